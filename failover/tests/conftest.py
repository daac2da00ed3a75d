from __future__ import annotations

from contextlib import contextmanager

import pytest

from failover.config import settings
from failover.exceptions import AttachConflictError
from failover.network.prober import NetworkProber
from failover.reconciler import ReconcilePolicy
from failover.schemas import (
    Action,
    AttachmentState,
    FloatingResource,
    NodeIdentity,
    ReconcileRequest,
)


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep tests away from /etc and the host syslog socket."""
    monkeypatch.setattr(settings, "state_file", str(tmp_path / "floating-resource.json"))
    monkeypatch.setattr(settings, "log_syslog", False)
    monkeypatch.setattr(settings, "region", "us-east-1")
    monkeypatch.setattr(settings, "vip", "")
    yield


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCloud:
    """In-memory control plane for one ENI and one EIP allocation.

    ``calls`` records every operation in order as ``(name, args...)``.
    """

    def __init__(
        self,
        owner: str | None = None,
        attachment_id: str | None = None,
        status: str = "attached",
        association_id: str | None = None,
        conflicts: int = 0,
    ):
        self.owner = owner
        self.attachment_id = attachment_id or (f"eni-attach-{owner}" if owner else None)
        self.status = status if owner else None
        self.association_id = association_id
        self.associated_to: tuple[str, str] | None = None
        self.conflicts = conflicts  # attach calls to reject; -1 rejects forever
        self.calls: list[tuple] = []
        self._counter = 0

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    @contextmanager
    def bounded_by(self, remaining):
        yield

    def describe_attachment(self, resource_id, allocation_id=None) -> AttachmentState:
        self.calls.append(("describe", resource_id))
        return AttachmentState(
            resource_id=resource_id,
            attached_instance_id=self.owner,
            attachment_id=self.attachment_id,
            attachment_status=self.status,
            is_address_associated=self.association_id is not None,
            association_id=self.association_id if allocation_id else None,
        )

    def detach(self, attachment_id, force=True) -> None:
        self.calls.append(("detach", attachment_id, force))
        if attachment_id == self.attachment_id:
            self.owner = None
            self.attachment_id = None
            self.status = None

    def attach(self, resource_id, instance_id, device_index) -> str:
        self.calls.append(("attach", resource_id, instance_id, device_index))
        if self.conflicts != 0:
            if self.conflicts > 0:
                self.conflicts -= 1
            raise AttachConflictError(
                "attach_network_interface: InvalidNetworkInterface.InUse: in use",
                "attach_network_interface",
                "InvalidNetworkInterface.InUse",
            )
        self._counter += 1
        self.owner = instance_id
        self.attachment_id = f"eni-attach-{self._counter:04d}"
        self.status = "attached"
        return self.attachment_id

    def associate_address(self, allocation_id, resource_id, private_ip) -> str:
        self.calls.append(("associate", allocation_id, resource_id, private_ip))
        self.association_id = "eipassoc-new"
        self.associated_to = (resource_id, private_ip)
        return self.association_id

    def disassociate_address(self, association_id) -> None:
        self.calls.append(("disassociate", association_id))
        self.association_id = None
        self.associated_to = None


class FakeProber(NetworkProber):
    """Local stack where the VIP shows up after ``appear_after`` checks.

    ``appear_after=None`` means the OS never configures it on its own;
    ``add_works`` controls whether an explicit add takes effect.
    """

    def __init__(
        self,
        interface: str = "ens6",
        appear_after: int | None = 0,
        add_works: bool = True,
        link_present: bool = True,
        primary: tuple[str, str] = ("ens5", "10.0.0.10"),
    ):
        self.interface = interface
        self.appear_after = appear_after
        self.add_works = add_works
        self.link_present = link_present
        self.primary = primary
        self.addresses: dict[str, set[str]] = {primary[0]: {primary[1]}}
        self.checks = 0
        self.added: list[tuple[str, str, int]] = []
        self.links_up: list[str] = []

    def has_address(self, interface, address) -> bool:
        if interface == self.interface and address != self.primary[1]:
            self.checks += 1
            if self.appear_after is not None and self.checks > self.appear_after:
                self.addresses.setdefault(interface, set()).add(address)
        return address in self.addresses.get(interface, set())

    def add_address(self, interface, address, prefix_length) -> None:
        self.added.append((interface, address, prefix_length))
        if self.add_works:
            self.addresses.setdefault(interface, set()).add(address)

    def link_exists(self, interface) -> bool:
        return self.link_present and interface in (self.interface, self.primary[0])

    def set_link_up(self, interface) -> None:
        self.links_up.append(interface)

    def detect_interface(self) -> str | None:
        return self.interface if self.link_present else self.primary[0]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return ReconcilePolicy(
        device_index=1,
        settle_interval=5.0,
        attach_attempts=3,
        local_wait_timeout=30.0,
        local_poll_interval=3.0,
        run_timeout=75.0,
    )


@pytest.fixture
def resource():
    return FloatingResource(resource_id="nic-1", vip="10.0.0.50")


@pytest.fixture
def eip_resource():
    return FloatingResource(resource_id="nic-1", vip="10.0.0.50", allocation_id="eipalloc-1")


def make_request(
    action: Action,
    resource: FloatingResource,
    instance_id: str = "i-bbb",
    interface_name: str = "ens6",
) -> ReconcileRequest:
    return ReconcileRequest(
        action=action,
        resource=resource,
        node=NodeIdentity(instance_id=instance_id, local_primary_ip="10.0.0.10", region="us-east-1"),
        interface_name=interface_name,
        subnet_prefix_length=20,
    )
