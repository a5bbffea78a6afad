"""Unit tests for availability_set_mover module.

The provider is a recording fake so the exact order of cloud calls can be
asserted: nothing destructive may happen before every validation passed.
"""

import json
from datetime import datetime

import pytest

from azavset.availability_set_mover import AvailabilitySetMover
from azavset.config_manager import MoverSettings
from azavset.exceptions import (
    AlignmentError,
    DeploymentError,
    EmptyTemplateError,
    ExportError,
    NotFoundError,
    SizeMismatchError,
    UnsupportedTopologyError,
)
from tests.fixtures.arm_templates import AVSET_ID, build_template
from tests.mocks.provider_mock import FakeProvider, aligned_avset, classic_avset, provider_error

FIXED_NOW = datetime(2024, 3, 5, 14, 7, 9)
TIMESTAMP = "2024-03-05_020709"

DESTRUCTIVE_CALLS = {"stop_vm", "delete_vm", "delete_nic", "deploy_template"}


@pytest.fixture
def settings(tmp_path):
    return MoverSettings(output_dir=tmp_path, dry_run=False)


def make_mover(provider, settings):
    return AvailabilitySetMover(provider, settings, clock=lambda: FIXED_NOW)


class TestJoin:
    """Tests for AvailabilitySetMover.join."""

    def test_join_two_vms_end_to_end(self, settings, tmp_path):
        provider = FakeProvider(template=build_template(), availability_set=aligned_avset())

        result = make_mover(provider, settings).join("rg1", ["vm1", "vm2"], "windows", "avset1")

        assert provider.call_names() == [
            "get_availability_set",
            "export_template",
            "validate_deployment",
            "get_vm_power_state",
            "stop_vm",
            "delete_vm",
            "get_vm_power_state",
            "stop_vm",
            "delete_vm",
            "deploy_template",
        ]
        assert provider.calls[0] == ("get_availability_set", "rg1", "avset1")
        assert provider.calls[4] == ("stop_vm", "rg1", "vm1")
        assert provider.calls[8] == ("delete_vm", "rg1", "vm2")
        assert provider.calls[-1] == (
            "deploy_template",
            "rg1",
            f"join-avset-{TIMESTAMP}",
            tmp_path / f"NewTemplate-{TIMESTAMP}.json",
            "Incremental",
        )

        assert result.vm_names == ["vm1", "vm2"]
        assert not result.partial_failure
        assert [s.step for s in result.steps] == [
            "stop",
            "delete-vm",
            "stop",
            "delete-vm",
            "deploy",
        ]

        deployed = provider.deployed_template
        assert len(deployed["resources"]) == 2
        for resource in deployed["resources"]:
            assert resource["properties"]["availabilitySet"] == {"id": AVSET_ID}
            assert resource["properties"]["storageProfile"]["osDisk"]["createOption"] == "Attach"

    def test_audit_files_written(self, settings, tmp_path):
        provider = FakeProvider(template=build_template(), availability_set=aligned_avset())

        result = make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")

        assert result.original_template_path == tmp_path / f"OriginalTemplate-{TIMESTAMP}.json"
        assert result.new_template_path == tmp_path / f"NewTemplate-{TIMESTAMP}.json"
        original = json.loads(result.original_template_path.read_text(encoding="utf-8"))
        assert original == build_template()
        edited = json.loads(result.new_template_path.read_text(encoding="utf-8"))
        assert len(edited["resources"]) == 1

    def test_missing_availability_set(self, settings):
        provider = FakeProvider(template=build_template(), availability_set=None)

        with pytest.raises(NotFoundError, match="avset1"):
            make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")
        assert provider.call_names() == ["get_availability_set"]

    def test_export_failure(self, settings):
        provider = FakeProvider(
            availability_set=aligned_avset(),
            failures={"export_template": provider_error("AuthorizationFailed")},
        )

        with pytest.raises(ExportError, match="AuthorizationFailed"):
            make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")

    def test_empty_template_stops_after_export(self, settings, tmp_path):
        provider = FakeProvider(template=build_template(), availability_set=aligned_avset())

        with pytest.raises(EmptyTemplateError):
            make_mover(provider, settings).join("rg1", ["ghost"], "windows", "avset1")

        assert provider.call_names() == ["get_availability_set", "export_template"]
        assert (tmp_path / f"OriginalTemplate-{TIMESTAMP}.json").exists()
        assert not (tmp_path / f"NewTemplate-{TIMESTAMP}.json").exists()

    def test_size_mismatch_is_not_destructive(self, settings):
        provider = FakeProvider(
            template=build_template(vm2_size="Standard_D4s_v3"),
            availability_set=aligned_avset(),
        )

        with pytest.raises(SizeMismatchError):
            make_mover(provider, settings).join("rg1", ["vm1", "vm2"], "windows", "avset1")
        assert not DESTRUCTIVE_CALLS & set(provider.call_names())

    def test_alignment_is_not_destructive(self, settings):
        provider = FakeProvider(template=build_template(), availability_set=classic_avset())

        with pytest.raises(AlignmentError):
            make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")
        assert not DESTRUCTIVE_CALLS & set(provider.call_names())

    def test_unresolved_vm_skipped(self, settings):
        provider = FakeProvider(template=build_template(), availability_set=aligned_avset())

        result = make_mover(provider, settings).join(
            "rg1", ["vm1", "ghost"], "windows", "avset1"
        )

        assert result.vm_names == ["vm1"]
        assert ("delete_vm", "rg1", "ghost") not in provider.calls

    def test_unresolved_vm_error_policy(self, tmp_path):
        settings = MoverSettings(output_dir=tmp_path, dry_run=False, unresolved_vm_policy="error")
        provider = FakeProvider(template=build_template(), availability_set=aligned_avset())

        with pytest.raises(NotFoundError, match="ghost"):
            make_mover(provider, settings).join("rg1", ["vm1", "ghost"], "windows", "avset1")
        assert not DESTRUCTIVE_CALLS & set(provider.call_names())


class TestLeave:
    """Tests for AvailabilitySetMover.leave."""

    def test_leave_with_load_balancer(self, settings):
        provider = FakeProvider(template=build_template(load_balanced=True))

        result = make_mover(provider, settings).leave("rg1", "vm1", "windows")

        assert provider.call_names() == [
            "get_vm",
            "export_template",
            "validate_deployment",
            "get_vm_power_state",
            "stop_vm",
            "delete_vm",
            "delete_nic",
            "deploy_template",
        ]
        assert ("delete_nic", "rg1", "vm1-nic") in provider.calls
        assert result.deployment_name == f"leave-avset-{TIMESTAMP}"
        assert result.nic_to_delete == "vm1-nic"
        assert len(result.warnings) == 1

        types = [r["type"] for r in provider.deployed_template["resources"]]
        assert types == ["Microsoft.Compute/virtualMachines", "Microsoft.Network/networkInterfaces"]

    def test_leave_without_load_balancer_keeps_nic(self, settings):
        provider = FakeProvider(template=build_template(vm1_availability_set_id=AVSET_ID))

        result = make_mover(provider, settings).leave("rg1", "vm1", "windows")

        assert "delete_nic" not in provider.call_names()
        assert result.nic_to_delete is None
        vm = provider.deployed_template["resources"][0]
        assert "availabilitySet" not in vm["properties"]

    def test_missing_vm(self, settings):
        provider = FakeProvider(template=build_template(), vm_exists=False)

        with pytest.raises(NotFoundError, match="vm1"):
            make_mover(provider, settings).leave("rg1", "vm1", "windows")
        assert provider.call_names() == ["get_vm"]

    def test_two_nics_is_not_destructive(self, settings):
        provider = FakeProvider(template=build_template(vm1_extra_nic=True))

        with pytest.raises(UnsupportedTopologyError):
            make_mover(provider, settings).leave("rg1", "vm1", "windows")
        assert provider.call_names() == ["get_vm", "export_template"]

    def test_empty_template_stops_after_export(self, settings, tmp_path):
        provider = FakeProvider(template=build_template())

        with pytest.raises(EmptyTemplateError, match="ghost"):
            make_mover(provider, settings).leave("rg1", "ghost", "windows")

        assert provider.call_names() == ["get_vm", "export_template"]
        assert (tmp_path / f"OriginalTemplate-{TIMESTAMP}.json").exists()
        assert not (tmp_path / f"NewTemplate-{TIMESTAMP}.json").exists()


class TestExecution:
    """Tests for the validation and destructive phases."""

    def test_dry_run_makes_no_changes(self, tmp_path):
        settings = MoverSettings(output_dir=tmp_path, dry_run=True)
        provider = FakeProvider(template=build_template(), availability_set=aligned_avset())

        result = make_mover(provider, settings).join("rg1", ["vm1", "vm2"], "windows", "avset1")

        assert result.dry_run
        assert result.steps == []
        assert provider.call_names() == [
            "get_availability_set",
            "export_template",
            "validate_deployment",
        ]
        assert result.new_template_path.exists()

    def test_repeated_run_keeps_earlier_audit_files(self, tmp_path):
        settings = MoverSettings(output_dir=tmp_path, dry_run=True)
        provider = FakeProvider(template=build_template(), availability_set=aligned_avset())
        mover = make_mover(provider, settings)

        first = mover.join("rg1", ["vm1"], "windows", "avset1")
        second = mover.join("rg1", ["vm1", "vm2"], "windows", "avset1")

        assert first.deployment_name == f"join-avset-{TIMESTAMP}"
        assert second.deployment_name == f"join-avset-{TIMESTAMP}-1"
        assert first.new_template_path != second.new_template_path
        assert len(json.loads(first.new_template_path.read_text())["resources"]) == 1
        assert len(list(tmp_path.glob("OriginalTemplate-*.json"))) == 2

    def test_validation_can_be_disabled(self, tmp_path):
        settings = MoverSettings(output_dir=tmp_path, dry_run=True, validate_before_deploy=False)
        provider = FakeProvider(template=build_template(), availability_set=aligned_avset())

        make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")

        assert "validate_deployment" not in provider.call_names()

    def test_validation_failure_is_not_destructive(self, settings):
        provider = FakeProvider(
            template=build_template(),
            availability_set=aligned_avset(),
            failures={"validate_deployment": provider_error("InvalidTemplate")},
        )

        with pytest.raises(DeploymentError, match="nothing was changed") as exc_info:
            make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")

        assert exc_info.value.template_path is not None
        assert not DESTRUCTIVE_CALLS & set(provider.call_names())

    def test_already_deallocated_vm_not_stopped(self, settings):
        provider = FakeProvider(
            template=build_template(),
            availability_set=aligned_avset(),
            power_state="VM deallocated",
        )

        result = make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")

        assert "stop_vm" not in provider.call_names()
        assert result.steps[0].step == "stop"
        assert result.steps[0].success

    def test_power_state_failure_still_stops(self, settings):
        provider = FakeProvider(
            template=build_template(),
            availability_set=aligned_avset(),
            failures={"get_vm_power_state": provider_error()},
        )

        make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")

        assert "stop_vm" in provider.call_names()

    def test_stop_and_delete_failures_are_best_effort(self, settings):
        provider = FakeProvider(
            template=build_template(),
            availability_set=aligned_avset(),
            failures={"stop_vm": provider_error("stop failed"), "delete_vm": provider_error()},
        )

        result = make_mover(provider, settings).join("rg1", ["vm1", "vm2"], "windows", "avset1")

        assert provider.call_names().count("delete_vm") == 2
        assert provider.call_names()[-1] == "deploy_template"
        assert result.partial_failure
        assert len(result.failed_steps) == 4
        assert result.failed_steps[0].message == "stop failed"
        assert result.steps[-1].step == "deploy"
        assert result.steps[-1].success

    def test_deployment_failure(self, settings, tmp_path):
        provider = FakeProvider(
            template=build_template(),
            availability_set=aligned_avset(),
            failures={"deploy_template": provider_error("Conflict")},
        )

        with pytest.raises(DeploymentError, match="Conflict") as exc_info:
            make_mover(provider, settings).join("rg1", ["vm1"], "windows", "avset1")

        error = exc_info.value
        assert error.template_path == tmp_path / f"NewTemplate-{TIMESTAMP}.json"
        assert error.template_path.exists()
        assert len(error.completed_steps) == 2
        assert "delete-vm vm1" in error.completed_steps[1]
