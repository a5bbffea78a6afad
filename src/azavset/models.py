"""Data models shared by the provider, transformer and mover."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class AvailabilitySet:
    """An existing availability set, as returned by the provider."""

    name: str
    id: str
    sku: str

    @property
    def is_aligned(self) -> bool:
        """Aligned availability sets host VMs with managed disks."""
        return self.sku.lower() == "aligned"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AvailabilitySet":
        """Create from `az vm availability-set show` output."""
        sku = data.get("sku") or {}
        return cls(
            name=data.get("name", ""),
            id=data.get("id", ""),
            # Availability sets created before managed disks carry no sku
            sku=sku.get("name") or "Classic",
        )


@dataclass
class StepResult:
    """Result of one destructive step (stop/delete/deploy) in a move."""

    step: str  # 'stop', 'delete-vm', 'delete-nic', 'validate', 'deploy'
    target: str
    success: bool
    message: str

    def __repr__(self) -> str:
        status = "SUCCESS" if self.success else "FAILED"
        return f"[{status}] {self.step} {self.target}: {self.message}"


@dataclass
class MoveResult:
    """Outcome of a join or leave operation."""

    operation: str  # 'join' or 'leave'
    resource_group: str
    vm_names: list[str]
    original_template_path: Path
    new_template_path: Path
    deployment_name: str
    dry_run: bool
    steps: list[StepResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    nic_to_delete: str | None = None

    @property
    def failed_steps(self) -> list[StepResult]:
        """Destructive steps that did not succeed."""
        return [s for s in self.steps if not s.success]

    @property
    def partial_failure(self) -> bool:
        """True when any destructive step failed; the resource group needs attention."""
        return bool(self.failed_steps)
