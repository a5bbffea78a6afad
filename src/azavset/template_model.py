"""ARM template model.

Template and Resource are thin wrappers over the ordered dicts produced by
json.load. Edits go through named operations (set_property, remove_property,
clear_depends_on, ...) so the transformer never pokes at raw keys; the
underlying dict is what gets serialized back out.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any

from azavset.arm_expressions import ExpressionEvaluator

logger = logging.getLogger(__name__)

VM_TYPE = "Microsoft.Compute/virtualMachines"
NIC_TYPE = "Microsoft.Network/networkInterfaces"


class Resource:
    """A single resource declaration in a template."""

    def __init__(self, data: dict[str, Any]) -> None:
        self.data = data

    def __repr__(self) -> str:
        return f"Resource(type={self.type!r}, name={self.name!r})"

    @property
    def type(self) -> str:
        return self.data.get("type", "")

    @property
    def name(self) -> str:
        return self.data.get("name", "")

    def is_type(self, resource_type: str) -> bool:
        """Case-insensitive resource type check."""
        return self.type.lower() == resource_type.lower()

    @property
    def is_vm(self) -> bool:
        return self.is_type(VM_TYPE)

    @property
    def is_nic(self) -> bool:
        return self.is_type(NIC_TYPE)

    @property
    def properties(self) -> dict[str, Any]:
        """The resource's properties map (created if missing)."""
        props = self.data.get("properties")
        if not isinstance(props, dict):
            props = {}
            self.data["properties"] = props
        return props

    def set_property(self, key: str, value: Any) -> None:
        self.properties[key] = value

    def remove_property(self, key: str) -> bool:
        """Remove a top-level property. Returns True if it was present."""
        if key not in self.properties:
            return False
        del self.properties[key]
        return True

    @property
    def depends_on(self) -> list[str]:
        return list(self.data.get("dependsOn") or [])

    def clear_depends_on(self) -> None:
        self.data["dependsOn"] = []

    def set_depends_on(self, references: list[str]) -> None:
        self.data["dependsOn"] = list(references)

    # VM accessors

    @property
    def storage_profile(self) -> dict[str, Any]:
        profile = self.properties.get("storageProfile")
        if not isinstance(profile, dict):
            profile = {}
            self.properties["storageProfile"] = profile
        return profile

    @property
    def os_disk(self) -> dict[str, Any]:
        disk = self.storage_profile.get("osDisk")
        if not isinstance(disk, dict):
            disk = {}
            self.storage_profile["osDisk"] = disk
        return disk

    @property
    def data_disks(self) -> list[dict[str, Any]]:
        return [d for d in self.storage_profile.get("dataDisks") or [] if isinstance(d, dict)]

    @property
    def vm_size(self) -> str | None:
        hardware = self.properties.get("hardwareProfile") or {}
        return hardware.get("vmSize")

    @property
    def has_managed_os_disk(self) -> bool:
        """Unmanaged disks carry a 'vhd' blob reference; managed disks do not."""
        return "vhd" not in self.os_disk

    @property
    def network_interface_refs(self) -> list[dict[str, Any]]:
        network = self.properties.get("networkProfile") or {}
        return [n for n in network.get("networkInterfaces") or [] if isinstance(n, dict)]

    # NIC accessors

    @property
    def ip_configurations(self) -> list[dict[str, Any]]:
        return [c for c in self.properties.get("ipConfigurations") or [] if isinstance(c, dict)]


class Template:
    """An exported resource group deployment template."""

    def __init__(self, data: dict[str, Any]) -> None:
        self.data = data

    @classmethod
    def from_json(cls, text: str) -> "Template":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Template JSON must be an object")
        return cls(data)

    @classmethod
    def load(cls, path: Path) -> "Template":
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def copy(self) -> "Template":
        return Template(copy.deepcopy(self.data))

    def to_json(self) -> str:
        """Serialize with quotes and non-ASCII characters written literally."""
        return json.dumps(self.data, indent=4, ensure_ascii=False)

    @property
    def parameters(self) -> dict[str, Any]:
        params = self.data.get("parameters")
        if not isinstance(params, dict):
            params = {}
            self.data["parameters"] = params
        return params

    @property
    def variables(self) -> dict[str, Any]:
        variables = self.data.get("variables")
        return variables if isinstance(variables, dict) else {}

    def remove_parameter(self, name: str) -> bool:
        if name not in self.parameters:
            return False
        del self.parameters[name]
        return True

    @property
    def resources(self) -> list[Resource]:
        return [Resource(r) for r in self.data.get("resources") or [] if isinstance(r, dict)]

    def set_resources(self, resources: list[Resource]) -> None:
        self.data["resources"] = [r.data for r in resources]

    def append_resource(self, resource: Resource) -> None:
        self.data.setdefault("resources", []).append(resource.data)

    def vm_resources(self) -> list[Resource]:
        return [r for r in self.resources if r.is_vm]

    def nic_resources(self) -> list[Resource]:
        return [r for r in self.resources if r.is_nic]

    def evaluator(self) -> ExpressionEvaluator:
        """Expression evaluator bound to this template's parameters and variables."""
        return ExpressionEvaluator(self.parameters, self.variables)
