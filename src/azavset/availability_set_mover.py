"""Availability set join/leave orchestration.

A move runs in two phases:

1. Validation phase (always): look up the availability set or VM, export the
   resource group template to an audit file, transform it, write the edited
   template and optionally pre-flight validate it. Any error here aborts
   with every VM untouched.
2. Destructive phase (only when not a dry run): for each VM stop and delete
   it, delete the orphaned NIC on leave, then deploy the edited template
   incrementally. Stop/delete failures are recorded and logged but do not
   stop the run; deployment failure raises DeploymentError naming the
   template on disk.

All policy (dry run, size check, unresolved VMs, validation) arrives through
MoverSettings; nothing is read from ambient state.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from azavset.audit_store import AuditStore, make_timestamp
from azavset.azure_provider import CloudResourceProvider
from azavset.config_manager import MoverSettings
from azavset.exceptions import DeploymentError, ExportError, NotFoundError, ProviderError
from azavset.models import MoveResult, StepResult
from azavset.template_model import Template
from azavset.template_transformer import transform_for_join, transform_for_leave

logger = logging.getLogger(__name__)

STOPPED_POWER_STATES = ("VM stopped", "VM deallocated")
DEPLOYMENT_MODE = "Incremental"


class AvailabilitySetMover:
    """Move VMs into or out of an availability set by redeploying them."""

    def __init__(
        self,
        provider: CloudResourceProvider,
        settings: MoverSettings,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.provider = provider
        self.settings = settings
        self.clock = clock

    def join(
        self,
        resource_group: str,
        vm_names: list[str],
        os_type: str,
        availability_set_name: str,
    ) -> MoveResult:
        """Move VMs into an existing availability set.

        Args:
            resource_group: Resource group holding the VMs and availability set
            vm_names: VMs to move (same size)
            os_type: 'windows' or 'linux', used when the OS disk has no osType
            availability_set_name: Target availability set

        Returns:
            MoveResult describing audit files and destructive steps

        Raises:
            NotFoundError: Availability set (or VM, with policy 'error') missing
            ExportError: Template export failed
            SizeMismatchError, AlignmentError, EmptyTemplateError: Validation failed
            DeploymentError: Pre-flight validation or deployment failed
        """
        logger.info(
            f"Joining {', '.join(vm_names)} to availability set "
            f"'{availability_set_name}' in {resource_group}"
        )

        availability_set = self.provider.get_availability_set(
            resource_group, availability_set_name
        )
        if availability_set is None:
            raise NotFoundError(
                f"Availability set '{availability_set_name}' not found in "
                f"resource group '{resource_group}'"
            )
        logger.debug(f"Availability set {availability_set.id} has sku {availability_set.sku}")

        store = AuditStore(self.settings.output_dir, make_timestamp(self.clock()))
        template = self._export(resource_group, store)

        transform = transform_for_join(
            template,
            vm_names,
            os_type,
            availability_set,
            size_check=self.settings.size_check,
            unresolved_vm_policy=self.settings.unresolved_vm_policy,
        )
        new_path = store.write_new(transform.template)

        result = MoveResult(
            operation="join",
            resource_group=resource_group,
            vm_names=transform.vm_names,
            original_template_path=store.original_path,
            new_template_path=new_path,
            deployment_name=f"join-avset-{store.timestamp}",
            dry_run=self.settings.dry_run,
            warnings=list(transform.warnings),
        )
        return self._execute(result)

    def leave(self, resource_group: str, vm_name: str, os_type: str) -> MoveResult:
        """Move a VM out of its availability set.

        Raises:
            NotFoundError: VM missing
            ExportError: Template export failed
            UnsupportedTopologyError: VM has more than one NIC
            EmptyTemplateError: VM not found in the exported template
            DeploymentError: Pre-flight validation or deployment failed
        """
        logger.info(f"Removing {vm_name} from its availability set in {resource_group}")

        if self.provider.get_vm(resource_group, vm_name) is None:
            raise NotFoundError(f"VM '{vm_name}' not found in resource group '{resource_group}'")

        store = AuditStore(self.settings.output_dir, make_timestamp(self.clock()))
        template = self._export(resource_group, store)

        transform = transform_for_leave(
            template,
            vm_name,
            os_type,
            unresolved_vm_policy=self.settings.unresolved_vm_policy,
        )
        new_path = store.write_new(transform.template)

        result = MoveResult(
            operation="leave",
            resource_group=resource_group,
            vm_names=transform.vm_names,
            original_template_path=store.original_path,
            new_template_path=new_path,
            deployment_name=f"leave-avset-{store.timestamp}",
            dry_run=self.settings.dry_run,
            warnings=list(transform.warnings),
            nic_to_delete=transform.nic_to_delete,
        )
        return self._execute(result)

    def _export(self, resource_group: str, store: AuditStore) -> Template:
        """Export the template, save the untouched copy, return it for editing."""
        try:
            exported: dict[str, Any] = self.provider.export_template(resource_group)
        except ProviderError as e:
            raise ExportError(f"Failed to export template for '{resource_group}': {e}") from e

        store.write_original(exported)
        return Template(exported)

    def _execute(self, result: MoveResult) -> MoveResult:
        if self.settings.validate_before_deploy:
            self._validate(result)

        if result.dry_run:
            logger.info(
                f"Dry run: no VMs stopped or deleted. Review {result.new_template_path} "
                "and re-run with --confirm to apply"
            )
            return result

        for vm_name in result.vm_names:
            self._stop(result, vm_name)
            self._delete_vm(result, vm_name)

        if result.nic_to_delete:
            self._delete_nic(result, result.nic_to_delete)

        self._deploy(result)

        if result.partial_failure:
            logger.warning(
                f"{len(result.failed_steps)} step(s) failed before deployment; "
                f"check resource group '{result.resource_group}'"
            )
        return result

    def _validate(self, result: MoveResult) -> None:
        try:
            self.provider.validate_deployment(
                result.resource_group, result.new_template_path, DEPLOYMENT_MODE
            )
        except ProviderError as e:
            raise DeploymentError(
                f"Template validation failed, nothing was changed: {e}",
                template_path=result.new_template_path,
            ) from e
        logger.info("Template validation passed")

    def _stop(self, result: MoveResult, vm_name: str) -> None:
        try:
            power_state = self.provider.get_vm_power_state(result.resource_group, vm_name)
        except ProviderError as e:
            logger.debug(f"Could not read power state of {vm_name}: {e}")
            power_state = None

        if power_state in STOPPED_POWER_STATES:
            result.steps.append(
                StepResult("stop", vm_name, True, f"Skipped, power state is {power_state}")
            )
            return

        logger.info(f"Stopping VM '{vm_name}'...")
        try:
            self.provider.stop_vm(result.resource_group, vm_name)
        except ProviderError as e:
            logger.error(f"VM {vm_name}: {e}")
            result.steps.append(StepResult("stop", vm_name, False, str(e)))
            return
        result.steps.append(StepResult("stop", vm_name, True, "VM deallocated"))

    def _delete_vm(self, result: MoveResult, vm_name: str) -> None:
        logger.info(f"Deleting VM '{vm_name}' (disks and NICs are kept)...")
        try:
            self.provider.delete_vm(result.resource_group, vm_name)
        except ProviderError as e:
            logger.error(f"VM {vm_name}: {e}")
            result.steps.append(StepResult("delete-vm", vm_name, False, str(e)))
            return
        result.steps.append(StepResult("delete-vm", vm_name, True, "VM deleted"))

    def _delete_nic(self, result: MoveResult, nic_name: str) -> None:
        logger.info(f"Deleting NIC '{nic_name}' so the template can recreate it...")
        try:
            self.provider.delete_nic(result.resource_group, nic_name)
        except ProviderError as e:
            logger.error(f"NIC {nic_name}: {e}")
            result.steps.append(StepResult("delete-nic", nic_name, False, str(e)))
            return
        result.steps.append(StepResult("delete-nic", nic_name, True, "NIC deleted"))

    def _deploy(self, result: MoveResult) -> None:
        logger.info(f"Submitting deployment '{result.deployment_name}'...")
        try:
            self.provider.deploy_template(
                result.resource_group,
                result.deployment_name,
                result.new_template_path,
                DEPLOYMENT_MODE,
            )
        except ProviderError as e:
            raise DeploymentError(
                f"Deployment '{result.deployment_name}' failed: {e}. "
                f"Redeploy manually from {result.new_template_path}",
                template_path=result.new_template_path,
                completed_steps=[repr(s) for s in result.steps],
            ) from e
        result.steps.append(
            StepResult("deploy", result.deployment_name, True, "Deployment succeeded")
        )


__all__ = ["AvailabilitySetMover"]
