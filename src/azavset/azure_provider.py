"""Cloud resource provider backed by the Azure CLI.

The mover never talks to Azure directly; everything stateful goes through a
CloudResourceProvider. AzureCliProvider implements it on top of `az`, in the
same subprocess style as the rest of azavset (no shell=True, captured output,
explicit per-call timeouts).

Only read-only calls honor max_attempts > 1. Stop, delete, validate and
deploy always run once.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Protocol

from azavset.azure_cli_executor import run_az_command
from azavset.config_manager import Timeouts
from azavset.exceptions import ProviderError
from azavset.models import AvailabilitySet
from azavset.retry_handler import safe_error_message

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("ResourceNotFound", "NotFound", "ResourceGroupNotFound")

# Deployment errors carry the ARM error JSON, which runs long.
DEPLOYMENT_ERROR_LENGTH = 2000


class CloudResourceProvider(Protocol):
    """Operations the availability set mover needs from the cloud."""

    def get_availability_set(self, resource_group: str, name: str) -> AvailabilitySet | None: ...

    def get_vm(self, resource_group: str, vm_name: str) -> dict[str, Any] | None: ...

    def export_template(self, resource_group: str) -> dict[str, Any]: ...

    def get_vm_power_state(self, resource_group: str, vm_name: str) -> str | None: ...

    def stop_vm(self, resource_group: str, vm_name: str) -> None: ...

    def delete_vm(self, resource_group: str, vm_name: str) -> None: ...

    def delete_nic(self, resource_group: str, nic_name: str) -> None: ...

    def validate_deployment(
        self, resource_group: str, template_path: Path, mode: str = "Incremental"
    ) -> None: ...

    def deploy_template(
        self,
        resource_group: str,
        deployment_name: str,
        template_path: Path,
        mode: str = "Incremental",
    ) -> None: ...


def _is_not_found(error: subprocess.CalledProcessError) -> bool:
    stderr = error.stderr or ""
    return any(marker in stderr for marker in NOT_FOUND_MARKERS)


class AzureCliProvider:
    """CloudResourceProvider implementation using the Azure CLI."""

    def __init__(
        self,
        timeouts: Timeouts | None = None,
        max_attempts: int = 1,
        subscription_id: str | None = None,
    ) -> None:
        self.timeouts = timeouts or Timeouts()
        self.max_attempts = max_attempts
        self.subscription_id = subscription_id

    def _cmd(self, *args: str) -> list[str]:
        cmd = ["az", *args]
        if self.subscription_id:
            cmd.extend(["--subscription", self.subscription_id])
        return cmd

    def _query_json(self, cmd: list[str], what: str) -> Any | None:
        """Run a read-only command returning JSON; None when the resource does not exist."""
        try:
            result = run_az_command(
                cmd, timeout=self.timeouts.query, max_attempts=self.max_attempts
            )
        except subprocess.CalledProcessError as e:
            if _is_not_found(e):
                return None
            raise ProviderError(f"Failed to get {what}: {safe_error_message(e)}") from e
        except subprocess.TimeoutExpired as e:
            raise ProviderError(f"Query for {what} timed out") from e

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Failed to parse {what}") from e

    def _run(self, cmd: list[str], timeout: int, what: str, max_length: int = 200) -> None:
        """Run a state-changing command exactly once."""
        try:
            run_az_command(cmd, timeout=timeout, max_attempts=1)
        except subprocess.CalledProcessError as e:
            raise ProviderError(f"Failed to {what}: {safe_error_message(e, max_length)}") from e
        except subprocess.TimeoutExpired as e:
            raise ProviderError(f"Timed out after {timeout}s trying to {what}") from e

    def get_availability_set(self, resource_group: str, name: str) -> AvailabilitySet | None:
        data = self._query_json(
            self._cmd(
                "vm",
                "availability-set",
                "show",
                "--name",
                name,
                "--resource-group",
                resource_group,
                "--output",
                "json",
            ),
            f"availability set {name}",
        )
        return AvailabilitySet.from_dict(data) if data else None

    def get_vm(self, resource_group: str, vm_name: str) -> dict[str, Any] | None:
        return self._query_json(
            self._cmd(
                "vm", "show", "--name", vm_name, "--resource-group", resource_group, "--output", "json"
            ),
            f"VM {vm_name}",
        )

    def export_template(self, resource_group: str) -> dict[str, Any]:
        """Export the resource group template with parameter default values.

        Raises:
            ProviderError: If the export fails or returns invalid JSON
        """
        cmd = self._cmd(
            "group",
            "export",
            "--name",
            resource_group,
            "--include-parameter-default-value",
            "--output",
            "json",
        )
        try:
            result = run_az_command(
                cmd, timeout=self.timeouts.export, max_attempts=self.max_attempts
            )
        except subprocess.CalledProcessError as e:
            raise ProviderError(f"az group export failed: {safe_error_message(e)}") from e
        except subprocess.TimeoutExpired as e:
            raise ProviderError(f"az group export timed out after {self.timeouts.export}s") from e

        try:
            template = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProviderError("az group export returned invalid JSON") from e
        if not isinstance(template, dict):
            raise ProviderError("az group export did not return a template object")
        return template

    def get_vm_power_state(self, resource_group: str, vm_name: str) -> str | None:
        data = self._query_json(
            self._cmd(
                "vm",
                "show",
                "--show-details",
                "--name",
                vm_name,
                "--resource-group",
                resource_group,
                "--query",
                "powerState",
                "--output",
                "json",
            ),
            f"power state of {vm_name}",
        )
        return data if isinstance(data, str) else None

    def stop_vm(self, resource_group: str, vm_name: str) -> None:
        # Deallocate releases the host so the VM can be recreated elsewhere
        self._run(
            self._cmd("vm", "deallocate", "--name", vm_name, "--resource-group", resource_group),
            self.timeouts.stop,
            f"stop VM {vm_name}",
        )
        logger.debug(f"Deallocated VM: {vm_name}")

    def delete_vm(self, resource_group: str, vm_name: str) -> None:
        self._run(
            self._cmd(
                "vm", "delete", "--name", vm_name, "--resource-group", resource_group, "--yes"
            ),
            self.timeouts.delete,
            f"delete VM {vm_name}",
        )
        logger.debug(f"Deleted VM: {vm_name}")

    def delete_nic(self, resource_group: str, nic_name: str) -> None:
        self._run(
            self._cmd(
                "network", "nic", "delete", "--name", nic_name, "--resource-group", resource_group
            ),
            self.timeouts.delete,
            f"delete NIC {nic_name}",
        )
        logger.debug(f"Deleted NIC: {nic_name}")

    def validate_deployment(
        self, resource_group: str, template_path: Path, mode: str = "Incremental"
    ) -> None:
        self._run(
            self._cmd(
                "deployment",
                "group",
                "validate",
                "--resource-group",
                resource_group,
                "--template-file",
                str(template_path),
                "--mode",
                mode,
            ),
            self.timeouts.validate,
            f"validate {template_path.name}",
            DEPLOYMENT_ERROR_LENGTH,
        )

    def deploy_template(
        self,
        resource_group: str,
        deployment_name: str,
        template_path: Path,
        mode: str = "Incremental",
    ) -> None:
        self._run(
            self._cmd(
                "deployment",
                "group",
                "create",
                "--name",
                deployment_name,
                "--resource-group",
                resource_group,
                "--template-file",
                str(template_path),
                "--mode",
                mode,
            ),
            self.timeouts.deploy,
            f"deploy {deployment_name}",
            DEPLOYMENT_ERROR_LENGTH,
        )
        logger.debug(f"Deployment submitted: {deployment_name}")


__all__ = ["AzureCliProvider", "CloudResourceProvider"]
