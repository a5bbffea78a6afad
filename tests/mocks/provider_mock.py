"""Recording fake for CloudResourceProvider.

Every call is appended to `calls` as (method, *args) so tests can assert on
exact ordering. Failures are injected per method name via `failures`.
"""

import copy
import json
from pathlib import Path
from typing import Any

from azavset.exceptions import ProviderError
from azavset.models import AvailabilitySet

from tests.fixtures.arm_templates import AVSET_ID


class FakeProvider:
    """In-memory CloudResourceProvider that records calls."""

    def __init__(
        self,
        template: dict[str, Any] | None = None,
        availability_set: AvailabilitySet | None = None,
        vm_exists: bool = True,
        power_state: str = "VM running",
        failures: dict[str, Exception] | None = None,
    ) -> None:
        self.template = template or {}
        self.availability_set = availability_set
        self.vm_exists = vm_exists
        self.power_state = power_state
        self.failures = failures or {}
        self.calls: list[tuple[Any, ...]] = []
        self.deployed_template: dict[str, Any] | None = None

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        if method in self.failures:
            raise self.failures[method]

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def get_availability_set(self, resource_group: str, name: str) -> AvailabilitySet | None:
        self._record("get_availability_set", resource_group, name)
        return self.availability_set

    def get_vm(self, resource_group: str, vm_name: str) -> dict[str, Any] | None:
        self._record("get_vm", resource_group, vm_name)
        return {"name": vm_name} if self.vm_exists else None

    def export_template(self, resource_group: str) -> dict[str, Any]:
        self._record("export_template", resource_group)
        return copy.deepcopy(self.template)

    def get_vm_power_state(self, resource_group: str, vm_name: str) -> str | None:
        self._record("get_vm_power_state", resource_group, vm_name)
        return self.power_state

    def stop_vm(self, resource_group: str, vm_name: str) -> None:
        self._record("stop_vm", resource_group, vm_name)

    def delete_vm(self, resource_group: str, vm_name: str) -> None:
        self._record("delete_vm", resource_group, vm_name)

    def delete_nic(self, resource_group: str, nic_name: str) -> None:
        self._record("delete_nic", resource_group, nic_name)

    def validate_deployment(
        self, resource_group: str, template_path: Path, mode: str = "Incremental"
    ) -> None:
        self._record("validate_deployment", resource_group, template_path, mode)

    def deploy_template(
        self,
        resource_group: str,
        deployment_name: str,
        template_path: Path,
        mode: str = "Incremental",
    ) -> None:
        self._record("deploy_template", resource_group, deployment_name, template_path, mode)
        self.deployed_template = json.loads(Path(template_path).read_text(encoding="utf-8"))


def aligned_avset() -> AvailabilitySet:
    return AvailabilitySet(name="avset1", id=AVSET_ID, sku="Aligned")


def classic_avset() -> AvailabilitySet:
    return AvailabilitySet(name="avset1", id=AVSET_ID, sku="Classic")


def provider_error(message: str = "boom") -> ProviderError:
    return ProviderError(message)
