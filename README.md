# kioskquota

Account-level resource quotas for multi-tenant clusters. An *account* owns
several namespaces, and an `AccountQuota` caps the combined resource usage of
all of them. This package holds the quota logic: data types, usage
arithmetic, an admission check, a usage controller, a resource monitor and
validating webhook handlers. Access to the cluster is supplied by the caller
through small protocol objects (clients, informers, registries).

## Modules

- `kioskquota.status`: the data types `AccountQuota`, `ResourceQuota`,
  `ResourceQuotaStatus` and `AccountQuotaStatusByNamespace`; per-namespace
  status helpers `get_resource_quotas_status_by_namespace` (returns the status
  or `None`), `insert_resource_quotas_status` and
  `remove_resource_quotas_status_by_namespace` (both return a new list); and
  resource-list arithmetic `add_resources`, `subtract_resources`,
  `mask_resources` and `resources_equal`. Quantities such as `"500m"`,
  `"2Gi"` or `3` are compared and summed as decimals.
- `kioskquota.accessor.AccountQuotaAccessor`: `get_quotas(namespace)` presents
  the account quotas of a namespace's account as `ResourceQuota` objects
  (polling up to 8 seconds while the namespace is not found, then raising
  `TimeoutError`); `update_quota_status(quota)` writes new usage back as the
  account total and the namespace's share. Recently written quotas are kept in
  a 100-entry cache and preferred when their resource version is newer.
- `kioskquota.admission.AccountQuotaAdmission`: handles `CREATE` and `UPDATE`.
  `validate(attributes)` lets sub-resource and cluster-level requests through,
  waits up to 10 seconds for the `Namespace` and `AccountQuota` caches to sync
  (raising `AdmissionForbidden` with "caches not synchronized" otherwise), then
  passes the request to an evaluator built once by the `evaluator_factory` you
  supply. `lock_acquisition(quotas)` locks quotas in name order and returns a
  function that releases them.
- `kioskquota.controller.AccountQuotaController`, built from
  `AccountQuotaControllerOptions`: `sync_account_quota` recalculates usage in
  every namespace of the account, writes the status back when it changed and
  raises `QuotaSyncError` if any step failed. `add_quota` routes quotas lacking
  status or usage to a priority queue. `run(workers, stop_event)` processes
  both queues in threads with retry back-off; `sync(discovery_func, period,
  stop_event)` keeps the resource monitors in step with discovery.
- `kioskquota.monitor.QuotaMonitor`: keeps one monitor per quotable resource,
  queues a `ResourceEvent` on deletes and on pod or service updates that free
  quota, and calls the replenishment function for each event. Resources with no
  evaluator get an object-count evaluator under `count/<resource>`.
- `kioskquota.discovery`: `GroupVersionResource`, `get_quotable_resources`
  (resources supporting create, list, watch and delete; raises
  `DiscoveryError`, marked `partial` when some results came back) and
  `print_diff`.
- `kioskquota.webhooks.attributes`: `AdmissionRequest`, `UserInfo`,
  `Attributes` and `new_attribute_from_request`, which decodes the objects of
  create, update and delete requests and raises `ValueError` for any other
  operation.
- `kioskquota.webhooks.validators`: `AccountQuotaValidator` and
  `TemplateInstanceValidator` deny updates that change `spec.account` or
  `spec.template`; `QuotaValidator` passes requests to an admission controller.
  All return an `AdmissionResponse`.
- `kioskquota.webhooks.register.register_webhooks(hook_server,
  admission_controller)`: registers the three handlers under
  `/validate-quota`, `/validate-accountquota` and `/validate-templateinstance`.
- Utilities: `kioskquota.locks.LockFactory` (one lock per name),
  `kioskquota.lister.GenericLister` and `cached_has_synced`,
  `kioskquota.convert` (YAML/JSON manifests to dictionaries) and
  `kioskquota.util` (namespace annotations, `strings_equal`, and `run`/`output`
  for external commands, raising `CommandError` on failure).

## Installation

```
pip install kioskquota
```

## Examples

Named locks shared between threads:

```python
from kioskquota.locks import LockFactory

factory = LockFactory()
with factory.get_lock("team-a-quota"):
    ...  # only one thread works on this quota at a time
```

Tracking per-namespace usage within an account quota:

```python
from kioskquota.status import (
    AccountQuotaStatusByNamespace,
    ResourceQuotaStatus,
    get_resource_quotas_status_by_namespace,
    insert_resource_quotas_status,
)

statuses = insert_resource_quotas_status(
    [],
    AccountQuotaStatusByNamespace(
        namespace="team-a-dev",
        status=ResourceQuotaStatus(used={"pods": "3"}),
    ),
)
status = get_resource_quotas_status_by_namespace(statuses, "team-a-dev")
print(status.used)  # {'pods': '3'}
```

Rejecting a change to an immutable field:

```python
import json

from kioskquota.webhooks.attributes import AdmissionRequest
from kioskquota.webhooks.validators import AccountQuotaValidator

old = {"kind": "AccountQuota", "spec": {"account": "team-a"}}
new = {"kind": "AccountQuota", "spec": {"account": "team-b"}}
response = AccountQuotaValidator().handle(
    AdmissionRequest(
        operation="UPDATE",
        object=json.dumps(new).encode(),
        old_object=json.dumps(old).encode(),
    )
)
print(response.allowed, response.reason)  # False Field spec.account is immutable
```

Splitting a multi-document manifest:

```python
from kioskquota.convert import string_to_unstructured_array

objects = string_to_unstructured_array(manifest_text)
```

## What this package does not do

- It does not talk to a cluster. Clients, informers, informer factories and
  evaluator registries are protocols the caller implements.
- It does not serve HTTP. `register_webhooks` hands handlers to a hook server
  object you provide; there is no webhook server, TLS setup or command-line
  entry point.
- It has no built-in usage evaluators for core resources such as pods or
  services beyond the object-count evaluators the monitor creates; usage comes
  from the registry you supply (or a `usage_func` on the controller options),
  and quota evaluation in the admission check comes from your
  `evaluator_factory`.

## Running the tests

```
pip install -e ".[test]"
pytest
```