"""Wiring the admission webhooks into a webhook server."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from kioskquota.webhooks.validators import (
    AccountQuotaValidator,
    AdmissionController,
    QuotaValidator,
    TemplateInstanceValidator,
)

QUOTA_PATH = "/validate-quota"
ACCOUNT_QUOTA_PATH = "/validate-accountquota"
TEMPLATE_INSTANCE_PATH = "/validate-templateinstance"


class HookServer(Protocol):
    def register(self, path: str, handler: Any) -> None: ...


def register_webhooks(
    hook_server: HookServer, admission_controller: AdmissionController | None
) -> dict[str, Any]:
    """Register the quota, account quota and template instance webhooks.

    Returns the handlers by path.
    """
    handlers: dict[str, Any] = {
        QUOTA_PATH: QuotaValidator(
            admission_controller=admission_controller,
            log=logging.getLogger("webhooks.Quota"),
        ),
        ACCOUNT_QUOTA_PATH: AccountQuotaValidator(
            log=logging.getLogger("webhooks.AccountQuota")
        ),
        TEMPLATE_INSTANCE_PATH: TemplateInstanceValidator(
            log=logging.getLogger("webhooks.TemplateInstance")
        ),
    }
    for path, handler in handlers.items():
        hook_server.register(path, handler)
    return handlers