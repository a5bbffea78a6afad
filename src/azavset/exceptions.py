"""Custom exceptions for availability set moves.

Validation errors (not found, size, alignment, topology, empty template) are
always raised before any destructive provider call. DeploymentError is the
only error raised after VMs may already have been deleted.
"""

from pathlib import Path


class AvailabilitySetMoveError(Exception):
    """Base exception for availability set move errors."""

    pass


class ConfigError(AvailabilitySetMoveError):
    """Configuration file or value is invalid."""

    pass


class NotFoundError(AvailabilitySetMoveError):
    """Availability set or VM does not exist."""

    pass


class AmbiguousVmError(AvailabilitySetMoveError):
    """VM name matches more than one VM resource in the template."""

    pass


class ProviderError(AvailabilitySetMoveError):
    """Cloud resource provider call failed."""

    pass


class ExportError(AvailabilitySetMoveError):
    """Resource group template export failed."""

    pass


class TemplateExpressionError(AvailabilitySetMoveError):
    """Template expression cannot be parsed or evaluated."""

    pass


class SizeMismatchError(AvailabilitySetMoveError):
    """Selected VMs fail the size homogeneity check."""

    pass


class AlignmentError(AvailabilitySetMoveError):
    """VM disk type is incompatible with the availability set SKU."""

    pass


class UnsupportedTopologyError(AvailabilitySetMoveError):
    """VM network layout cannot be handled (e.g. more than one NIC)."""

    pass


class EmptyTemplateError(AvailabilitySetMoveError):
    """No resources survived filtering."""

    pass


class DeploymentError(AvailabilitySetMoveError):
    """Validation or deployment of the edited template failed.

    By the time this is raised the original VMs may already be deleted.
    template_path points at the edited template so it can be redeployed
    manually.
    """

    def __init__(
        self,
        message: str,
        template_path: Path | None = None,
        completed_steps: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.template_path = template_path
        self.completed_steps = completed_steps or []
