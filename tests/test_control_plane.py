from __future__ import annotations

import logging

import pytest

from fakes import FakeDirectory
from openstack_tool.openstack.hypervisors import list_hypervisors, resolve_hypervisor
from openstack_tool.openstack.inventory import ControlPlaneInventoryReader
from openstack_tool.schema import HypervisorRecord, ProjectRecord, ServerRecord
from openstack_tool.util.errors import FetchError, ResolutionError

HOST = "pvm-host-01.example.com"


def _server(instance_name, host=HOST, name=None) -> ServerRecord:
    return ServerRecord(name=name or f"display-{instance_name}", instance_name=instance_name, hypervisor_hostname=host)


def test_instances_filtered_by_host_and_tagged_with_project() -> None:
    directory = FakeDirectory(
        projects=[ProjectRecord("p1", "alpha"), ProjectRecord("p2", "beta")],
        servers={
            "p1": [_server("vm1"), _server("vm-elsewhere", host="other-host")],
            "p2": [_server("vm2", host=HOST.upper())],
        },
    )

    inventory = ControlPlaneInventoryReader(directory, delay=0).list_instances_on_hypervisor(HOST)

    assert sorted((i.instance_name, i.tenant_name) for i in inventory.instances) == [("vm1", "alpha"), ("vm2", "beta")]
    assert inventory.failed_projects == []
    assert inventory.total_projects == 2


def test_failing_project_is_skipped_and_recorded(caplog) -> None:
    directory = FakeDirectory(
        projects=[ProjectRecord("p1", "alpha"), ProjectRecord("p2", "broken"), ProjectRecord("p3", "gamma")],
        servers={"p1": [_server("vm1")], "p3": [_server("vm3")]},
        failing_projects={"p2"},
    )
    done = []

    with caplog.at_level(logging.WARNING):
        inventory = ControlPlaneInventoryReader(
            directory,
            attempts=2,
            delay=0,
            on_project_done=lambda project, ok: done.append((project.name, ok)),
        ).list_instances_on_hypervisor(HOST)

    assert sorted(i.instance_name for i in inventory.instances) == ["vm1", "vm3"]
    assert [f.project.name for f in inventory.failed_projects] == ["broken"]
    assert directory.instance_calls.count("p2") == 2
    assert sorted(done) == [("alpha", True), ("broken", False), ("gamma", True)]
    assert "project broken" in caplog.text


def test_server_without_instance_name_is_skipped_with_warning(caplog) -> None:
    directory = FakeDirectory(
        projects=[ProjectRecord("p1", "alpha")],
        servers={"p1": [_server(None, name="nameless"), _server("vm1")]},
    )

    with caplog.at_level(logging.WARNING):
        inventory = ControlPlaneInventoryReader(directory, delay=0).list_instances_on_hypervisor(HOST)

    assert [i.instance_name for i in inventory.instances] == ["vm1"]
    assert "nameless" in caplog.text


def test_project_listing_failure_is_fatal() -> None:
    directory = FakeDirectory(projects_error=RuntimeError("keystone down"))

    with pytest.raises(FetchError, match="error fetching projects"):
        ControlPlaneInventoryReader(directory, attempts=1, delay=0).list_instances_on_hypervisor(HOST)


def test_transient_project_failure_recovers_on_retry() -> None:
    class Flaky(FakeDirectory):
        def list_instances(self, project_id):
            self.instance_calls.append(project_id)
            if len(self.instance_calls) == 1:
                raise FetchError("temporary")
            return [_server("vm1")]

    directory = Flaky(projects=[ProjectRecord("p1", "alpha")])

    inventory = ControlPlaneInventoryReader(directory, attempts=3, delay=0).list_instances_on_hypervisor(HOST)

    assert [i.instance_name for i in inventory.instances] == ["vm1"]
    assert inventory.failed_projects == []


def test_resolve_hypervisor_exact_ip_match() -> None:
    directory = FakeDirectory(
        hypervisors=[HypervisorRecord("10.0.0.50", "hv-50"), HypervisorRecord("10.0.0.5", "hv-5")],
    )

    hypervisors = list_hypervisors(directory, delay=0)

    assert resolve_hypervisor(hypervisors, "10.0.0.5").hostname == "hv-5"
    with pytest.raises(ResolutionError, match="no matching hypervisor found for IP: 10.0.0.6"):
        resolve_hypervisor(hypervisors, "10.0.0.6")
