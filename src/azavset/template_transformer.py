"""Template transformation for availability set moves.

Takes an exported resource group template and rewrites it so that a
redeployment recreates the selected VMs on their existing disks, attached to
(join) or detached from (leave) an availability set.

Every function here is pure JSON-tree editing: no provider calls, no I/O.
Validation errors raised here are guaranteed to fire before anything is
stopped or deleted.

Public API:
    strip_deployment_parameters: Drop parameters invalid on re-import
    resolve_vm_parameter: Map a VM name to the parameter holding it
    select_vm_resources: VM resources declared for a VM name
    transform_for_join: Full join transformation
    transform_for_leave: Full leave transformation
"""

import logging
from dataclasses import dataclass, field

from azavset.arm_expressions import ExpressionEvaluator, ResourceReference, referenced_parameters
from azavset.exceptions import (
    AlignmentError,
    AmbiguousVmError,
    ConfigError,
    EmptyTemplateError,
    NotFoundError,
    SizeMismatchError,
    TemplateExpressionError,
    UnsupportedTopologyError,
)
from azavset.models import AvailabilitySet
from azavset.template_model import NIC_TYPE, Resource, Template

logger = logging.getLogger(__name__)

# Deployment-time-only or extension parameters rejected on re-import
STRIPPED_PARAMETER_MARKERS = ("adminPassword", "primary", "extensions_Microsoft.")

LOAD_BALANCER_KEYS = ("loadBalancerBackendAddressPools", "loadBalancerInboundNatRules")

SIZE_CHECK_MODES = ("uniform", "legacy", "off")
UNRESOLVED_VM_POLICIES = ("skip", "error")
OS_TYPES = ("windows", "linux")


@dataclass
class TransformResult:
    """Edited template plus what the destructive phase needs to know."""

    template: Template
    vm_names: list[str]
    nic_to_delete: str | None = None
    warnings: list[str] = field(default_factory=list)


def strip_deployment_parameters(template: Template) -> list[str]:
    """Remove parameters whose name contains a stripped marker.

    Returns:
        Names of removed parameters
    """
    removed = [
        name
        for name in list(template.parameters)
        if any(marker in name for marker in STRIPPED_PARAMETER_MARKERS)
    ]
    for name in removed:
        template.remove_parameter(name)

    if removed:
        logger.debug(f"Stripped parameters: {', '.join(removed)}")
    return removed


def resolve_vm_parameter(template: Template, vm_name: str) -> str | None:
    """Find the parameter whose defaultValue is the VM's name.

    Comparison is case-insensitive. When several parameters carry the same
    value (e.g. a NIC named after its VM) only those referenced by a VM
    resource's name are considered.

    Args:
        template: Template to search
        vm_name: Literal VM name

    Returns:
        Parameter name, or None if no parameter names this VM

    Raises:
        AmbiguousVmError: If more than one parameter names a VM resource
    """
    wanted = vm_name.lower()
    candidates = [
        name
        for name, definition in template.parameters.items()
        if isinstance(definition, dict)
        and isinstance(definition.get("defaultValue"), str)
        and definition["defaultValue"].lower() == wanted
    ]

    if len(candidates) <= 1:
        return candidates[0] if candidates else None

    vm_references: set[str] = set()
    for resource in template.vm_resources():
        vm_references |= _safe_referenced_parameters(resource.name)

    narrowed = [c for c in candidates if c in vm_references]
    if len(narrowed) > 1:
        raise AmbiguousVmError(
            f"VM name '{vm_name}' matches several VM parameters: {', '.join(narrowed)}"
        )
    return narrowed[0] if narrowed else None


def _safe_referenced_parameters(value: str) -> set[str]:
    try:
        return referenced_parameters(value)
    except TemplateExpressionError as e:
        logger.debug(f"Skipping unparseable name {value!r}: {e}")
        return set()


def select_vm_resources(template: Template, vm_name: str) -> list[Resource]:
    """Select the VM resources declared for a VM name.

    A VM resource matches when its name expression references the resolved
    parameter. Templates exported without parameterized names fall back to
    comparing the evaluated literal name.
    """
    parameter = resolve_vm_parameter(template, vm_name)

    if parameter is not None:
        matches = [
            r for r in template.vm_resources() if parameter in _safe_referenced_parameters(r.name)
        ]
        if matches:
            return matches

    evaluator = template.evaluator()
    return [
        r
        for r in template.vm_resources()
        if (evaluator.evaluate_name(r.name) or "").lower() == vm_name.lower()
    ]


def select_resources(
    template: Template, vm_names: list[str], unresolved_vm_policy: str = "skip"
) -> tuple[list[Resource], list[str]]:
    """Select VM resources for every requested name.

    Args:
        template: Template to select from
        vm_names: Requested VM names
        unresolved_vm_policy: 'skip' logs and continues, 'error' raises

    Returns:
        Tuple of (selected resources, VM names that resolved)

    Raises:
        NotFoundError: If a name is unresolved and the policy is 'error'
    """
    if unresolved_vm_policy not in UNRESOLVED_VM_POLICIES:
        raise ConfigError(f"Invalid unresolved_vm_policy: {unresolved_vm_policy}")

    selected: list[Resource] = []
    seen: set[int] = set()
    resolved: list[str] = []

    for vm_name in vm_names:
        matches = select_vm_resources(template, vm_name)
        if not matches:
            if unresolved_vm_policy == "error":
                raise NotFoundError(f"VM '{vm_name}' not found in exported template")
            logger.warning(f"VM '{vm_name}' not found in exported template, skipping")
            continue

        for resource in matches:
            if id(resource.data) not in seen:
                seen.add(id(resource.data))
                selected.append(resource)
        if vm_name.lower() not in (n.lower() for n in resolved):
            resolved.append(vm_name)

    return selected, resolved


def check_size_homogeneity(resources: list[Resource], mode: str = "uniform") -> None:
    """Check the selected VMs against the size policy.

    'uniform' requires a single distinct size. 'legacy' reproduces the
    historical comparison, which rejects a single distinct size. 'off'
    skips the check.

    Raises:
        SizeMismatchError: If the policy rejects the sizes
        ConfigError: On an unknown mode
    """
    if mode not in SIZE_CHECK_MODES:
        raise ConfigError(f"Invalid size_check mode: {mode}")
    if mode == "off":
        return

    sizes = sorted({(r.vm_size or "").lower() for r in resources})

    if mode == "uniform" and len(sizes) > 1:
        raise SizeMismatchError(f"VMs must all be the same size, found: {', '.join(sizes)}")
    if mode == "legacy":
        logger.warning(
            "size_check=legacy rejects VMs that share one size; use 'uniform' unless "
            "reproducing the historical behavior is intended"
        )
        if len(sizes) == 1:
            raise SizeMismatchError(f"VM size check failed (legacy mode): {sizes[0]}")


def check_alignment(
    resources: list[Resource],
    availability_set: AvailabilitySet,
    evaluator: ExpressionEvaluator | None = None,
) -> None:
    """Managed-disk VMs need an Aligned set, unmanaged-disk VMs a Classic one.

    Args:
        resources: Selected VM resources
        availability_set: Target availability set
        evaluator: Used to report VM names instead of their expressions

    Raises:
        AlignmentError: On the first incompatible VM
    """
    for resource in resources:
        vm_name = (evaluator.evaluate_name(resource.name) if evaluator else None) or resource.name
        if resource.has_managed_os_disk and not availability_set.is_aligned:
            raise AlignmentError(
                f"VM {vm_name} uses managed disks but availability set "
                f"'{availability_set.name}' has sku {availability_set.sku}; Aligned is required"
            )
        if not resource.has_managed_os_disk and availability_set.is_aligned:
            raise AlignmentError(
                f"VM {vm_name} uses unmanaged disks but availability set "
                f"'{availability_set.name}' has sku {availability_set.sku}; Classic is required"
            )


def prepare_vm_for_attach(resource: Resource, os_type: str) -> None:
    """Rewrite a VM declaration to re-attach its existing disks."""
    resource.clear_depends_on()

    os_disk = resource.os_disk
    os_disk["createOption"] = "Attach"
    if not os_disk.get("osType"):
        os_disk["osType"] = os_type.lower()

    # osProfile and imageReference are only valid when creating from an image
    resource.remove_property("osProfile")
    resource.storage_profile.pop("imageReference", None)

    for disk in resource.data_disks:
        disk["createOption"] = "Attach"

    for nic_ref in resource.network_interface_refs:
        props = nic_ref.get("properties")
        if isinstance(props, dict):
            props.pop("primary", None)
            if not props:
                del nic_ref["properties"]


def detach_load_balancer(nic: Resource) -> list[str]:
    """Drop load balancer pool and NAT rule associations from a NIC.

    Returns:
        The association keys that were removed
    """
    removed: list[str] = []
    for ip_config in nic.ip_configurations:
        props = ip_config.get("properties")
        if not isinstance(props, dict):
            continue
        for key in LOAD_BALANCER_KEYS:
            if key in props:
                del props[key]
                if key not in removed:
                    removed.append(key)
    return removed


def find_vm_nic(template: Template, vm: Resource) -> tuple[Resource | None, ResourceReference, str]:
    """Locate the single NIC a VM references.

    Returns:
        Tuple of (NIC resource or None if not declared in the template,
        resolved reference, raw reference expression)

    Raises:
        UnsupportedTopologyError: If the VM does not have exactly one NIC or
            the reference cannot be resolved
    """
    refs = vm.network_interface_refs
    if len(refs) != 1:
        raise UnsupportedTopologyError(
            f"VM {vm.name} has {len(refs)} network interfaces; exactly one is supported"
        )

    raw_id = refs[0].get("id", "")
    evaluator = template.evaluator()
    reference = evaluator.resolve_reference(raw_id)
    if reference is None or reference.resource_type.lower() != NIC_TYPE.lower():
        raise UnsupportedTopologyError(f"Cannot resolve network interface reference: {raw_id}")

    for nic in template.nic_resources():
        nic_name = evaluator.evaluate_name(nic.name)
        if nic_name and reference.matches(nic.type, nic_name):
            return nic, reference, raw_id

    return None, reference, raw_id


def _validate_os_type(os_type: str) -> None:
    if os_type.lower() not in OS_TYPES:
        raise ConfigError(f"Invalid OS type '{os_type}', expected windows or linux")


def transform_for_join(
    template: Template,
    vm_names: list[str],
    os_type: str,
    availability_set: AvailabilitySet,
    *,
    size_check: str = "uniform",
    unresolved_vm_policy: str = "skip",
) -> TransformResult:
    """Rewrite a template so the named VMs redeploy into an availability set.

    The template is edited in place and returned in the result.

    Raises:
        EmptyTemplateError: No VM resource matched
        SizeMismatchError: VM sizes fail the size policy
        AlignmentError: Disk type incompatible with the availability set SKU
        NotFoundError: Unresolved VM with policy 'error'
        AmbiguousVmError: VM name matches several VM resources
    """
    _validate_os_type(os_type)
    strip_deployment_parameters(template)

    selected, resolved = select_resources(template, vm_names, unresolved_vm_policy)
    template.set_resources(selected)
    if not selected:
        raise EmptyTemplateError(
            f"None of the requested VMs were found in the template: {', '.join(vm_names)}"
        )

    check_size_homogeneity(selected, size_check)
    check_alignment(selected, availability_set, template.evaluator())

    for vm in selected:
        prepare_vm_for_attach(vm, os_type)
        vm.set_property("availabilitySet", {"id": availability_set.id})

    logger.info(
        f"Prepared {len(selected)} VM(s) to join availability set '{availability_set.name}'"
    )
    return TransformResult(template=template, vm_names=resolved)


def transform_for_leave(
    template: Template,
    vm_name: str,
    os_type: str,
    *,
    unresolved_vm_policy: str = "skip",
) -> TransformResult:
    """Rewrite a template so a VM redeploys outside any availability set.

    If the VM's NIC sits in a load balancer backend pool or NAT rule, those
    associations are dropped and the NIC is redeployed with the VM; the
    caller must then delete the live NIC before deploying.

    Raises:
        EmptyTemplateError: The VM was not found in the template
        UnsupportedTopologyError: The VM has more than one NIC
    """
    _validate_os_type(os_type)
    strip_deployment_parameters(template)

    # NIC lookup needs the full resource list, so resolve it before filtering
    selected, resolved = select_resources(template, [vm_name], unresolved_vm_policy)
    if not selected:
        template.set_resources([])
        raise EmptyTemplateError(f"VM '{vm_name}' was not found in the template")

    vm = selected[0]
    nic, nic_reference, nic_ref_id = find_vm_nic(template, vm)
    template.set_resources(selected)

    result = TransformResult(template=template, vm_names=resolved)

    prepare_vm_for_attach(vm, os_type)
    if vm.remove_property("availabilitySet"):
        logger.info(f"Removed availability set from VM '{vm_name}'")
    else:
        logger.info(f"VM '{vm_name}' is not in an availability set")

    if nic is None:
        logger.debug(f"NIC {nic_reference.name} is not declared in the template")
        return result

    removed = detach_load_balancer(nic)
    if removed:
        warning = (
            f"Removed {', '.join(removed)} from NIC '{nic_reference.name}'. "
            "Load balancer connectivity must be re-established manually."
        )
        logger.warning(warning)
        result.warnings.append(warning)

        nic.clear_depends_on()
        template.append_resource(nic)
        vm.set_depends_on([nic_ref_id])
        result.nic_to_delete = nic_reference.name

    return result


__all__ = [
    "TransformResult",
    "check_alignment",
    "check_size_homogeneity",
    "detach_load_balancer",
    "find_vm_nic",
    "prepare_vm_for_attach",
    "resolve_vm_parameter",
    "select_resources",
    "select_vm_resources",
    "strip_deployment_parameters",
    "transform_for_join",
    "transform_for_leave",
]
