"""Admission webhook handlers for quotas and template instances."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Protocol

from kioskquota.webhooks.attributes import (
    UPDATE,
    AdmissionRequest,
    Attributes,
    Decoder,
    Kind,
    decode_raw,
    new_attribute_from_request,
)


class AdmissionController(Protocol):
    def handles(self, operation: Any) -> bool: ...

    def validate(self, attributes: Attributes) -> None: ...


@dataclass(frozen=True)
class AdmissionResponse:
    """The verdict of a webhook on one request."""

    allowed: bool
    code: int = HTTPStatus.OK
    reason: str = ""

    @classmethod
    def allow(cls, reason: str = "") -> AdmissionResponse:
        return cls(True, HTTPStatus.OK, reason)

    @classmethod
    def deny(cls, reason: str) -> AdmissionResponse:
        return cls(False, HTTPStatus.FORBIDDEN, reason)

    @classmethod
    def error(cls, code: int, exc: BaseException) -> AdmissionResponse:
        return cls(False, code, str(exc))


def _spec_field(obj: Any, name: str) -> Any:
    spec = obj.get("spec") if isinstance(obj, dict) else None
    if not isinstance(spec, dict):
        return ""
    return spec.get(name, "")


def _check_immutable(
    request: AdmissionRequest, decode: Decoder, kind: str, field_name: str
) -> AdmissionResponse:
    if request.operation != UPDATE:
        return AdmissionResponse.allow()
    expected = Kind(kind=kind)
    try:
        new_obj = decode(request.object, expected)
        old_obj = decode(request.old_object, expected)
    except Exception as exc:
        return AdmissionResponse.error(HTTPStatus.BAD_REQUEST, exc)
    if _spec_field(new_obj, field_name) != _spec_field(old_obj, field_name):
        return AdmissionResponse.deny(f"Field spec.{field_name} is immutable")
    return AdmissionResponse.allow()


@dataclass
class AccountQuotaValidator:
    """Refuses updates that change the account of an account quota."""

    log: logging.Logger = field(
        default_factory=lambda: logging.getLogger("webhooks.AccountQuota")
    )
    decode: Decoder = decode_raw

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        """Allow everything except updates that change ``spec.account``."""
        return _check_immutable(request, self.decode, "AccountQuota", "account")


@dataclass
class TemplateInstanceValidator:
    """Refuses updates that change the template of a template instance."""

    log: logging.Logger = field(
        default_factory=lambda: logging.getLogger("webhooks.TemplateInstance")
    )
    decode: Decoder = decode_raw

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        """Allow everything except updates that change ``spec.template``."""
        return _check_immutable(request, self.decode, "TemplateInstance", "template")


@dataclass
class QuotaValidator:
    """Passes requests to an admission controller that enforces account quotas."""

    admission_controller: AdmissionController | None = None
    log: logging.Logger = field(default_factory=lambda: logging.getLogger("webhooks.Quota"))
    decode: Decoder = decode_raw

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        """Deny when no controller is set or the controller refuses the request."""
        controller = self.admission_controller
        if controller is None:
            return AdmissionResponse.deny("Admission controller is not ready")
        if not controller.handles(request.operation):
            return AdmissionResponse.allow()
        try:
            attributes = new_attribute_from_request(request, self.decode)
        except Exception as exc:
            return AdmissionResponse.error(1, exc)
        try:
            controller.validate(attributes)
        except Exception as exc:
            return AdmissionResponse.deny(str(exc))
        return AdmissionResponse.allow()