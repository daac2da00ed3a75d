"""Tests for the keepalived role-transition adapter."""
from __future__ import annotations

import logging

import pytest
from botocore.exceptions import NoRegionError

from conftest import FakeCloud, FakeProber
from failover import notify
from failover.config import settings
from failover.exceptions import InvalidRoleError, MetadataUnavailableError
from failover.notify import (
    EXIT_FAILED,
    EXIT_IDENTITY,
    EXIT_INVALID_INPUT,
    EXIT_OK,
    Collaborators,
    action_for_role,
    build_request,
    handle_role,
    parse_role,
)
from failover.schemas import Action, NodeIdentity, Role
from failover.state_file import PersistedState, write_state


class FakeResolver:
    def __init__(self, instance_id="i-bbb", error: Exception | None = None):
        self.instance_id = instance_id
        self.error = error
        self.calls = 0

    def resolve(self) -> NodeIdentity:
        self.calls += 1
        if self.error:
            raise self.error
        return NodeIdentity(instance_id=self.instance_id, local_primary_ip="10.0.0.10", region="eu-west-1")


@pytest.fixture(autouse=True)
def _fast_policy(monkeypatch):
    monkeypatch.setattr(settings, "settle_interval", 0.0)
    monkeypatch.setattr(settings, "local_poll_interval", 0.0)
    monkeypatch.setattr(settings, "local_wait_timeout", 0.0)


@pytest.fixture
def recorded_state():
    state = PersistedState(resource_id="nic-1", vip="10.0.0.50", interface_name="ens6", subnet_prefix_length=20)
    write_state(settings.state_file, state)
    return state


def _deps(cloud, resolver=None, prober=None, regions=None):
    def factory(region):
        if regions is not None:
            regions.append(region)
        return cloud

    return Collaborators(resolver=resolver or FakeResolver(), cloud_factory=factory, prober=prober or FakeProber())


@pytest.mark.parametrize(
    "token, role",
    [("active", Role.ACTIVE), ("MASTER", Role.ACTIVE), ("standby", Role.STANDBY), ("backup", Role.STANDBY), ("fault", Role.FAULT)],
)
def test_parse_role(token, role):
    assert parse_role(token) == role


def test_parse_role_rejects_unknown():
    with pytest.raises(InvalidRoleError):
        parse_role("stop")


def test_role_actions():
    assert action_for_role(Role.ACTIVE) == Action.CLAIM
    assert action_for_role(Role.STANDBY) == Action.RELEASE
    assert action_for_role(Role.FAULT) == Action.RELEASE


def test_build_request_prefers_recorded_interface(monkeypatch):
    monkeypatch.setattr(settings, "interface_name", "auto")
    monkeypatch.setattr(settings, "subnet_prefix_length", 32)
    identity = NodeIdentity(instance_id="i-bbb", local_primary_ip="10.0.0.10")

    request = build_request(
        Action.CLAIM,
        PersistedState(resource_id="nic-1", vip="10.0.0.50", interface_name="ens6", subnet_prefix_length=20),
        identity,
    )
    assert request.interface_name == "ens6"
    assert request.subnet_prefix_length == 20

    request = build_request(Action.CLAIM, PersistedState(resource_id="nic-1", vip="10.0.0.50"), identity)
    assert request.interface_name == "auto"
    assert request.subnet_prefix_length == 32


def test_active_moves_resource_from_peer(recorded_state):
    cloud = FakeCloud(owner="i-aaa")

    assert handle_role("active", _deps(cloud)) == EXIT_OK
    assert cloud.call_names() == ["describe", "detach", "attach"]
    assert cloud.calls[2] == ("attach", "nic-1", "i-bbb", 1)


def test_standby_when_unattached_is_noop(recorded_state):
    cloud = FakeCloud()

    assert handle_role("standby", _deps(cloud)) == EXIT_OK
    assert "detach" not in cloud.call_names()


def test_fault_releases_owned_resource(recorded_state):
    cloud = FakeCloud(owner="i-bbb")

    assert handle_role("fault", _deps(cloud)) == EXIT_OK
    assert cloud.call_names() == ["describe", "detach"]


def test_invalid_token_makes_no_calls(recorded_state):
    cloud = FakeCloud()
    resolver = FakeResolver()

    assert handle_role("promote", _deps(cloud, resolver=resolver)) == EXIT_INVALID_INPUT
    assert cloud.calls == []
    assert resolver.calls == 0


def test_identity_failure_is_fatal(recorded_state):
    cloud = FakeCloud(owner="i-aaa")
    resolver = FakeResolver(error=MetadataUnavailableError("connection refused"))

    assert handle_role("active", _deps(cloud, resolver=resolver)) == EXIT_IDENTITY
    assert cloud.calls == []


def test_missing_state_file():
    cloud = FakeCloud()

    assert handle_role("active", _deps(cloud)) == EXIT_INVALID_INPUT
    assert cloud.calls == []


def test_reconcile_failure_is_nonzero(recorded_state, monkeypatch):
    monkeypatch.setattr(settings, "attach_attempts", 2)
    cloud = FakeCloud(conflicts=-1)

    assert handle_role("active", _deps(cloud)) == EXIT_FAILED
    assert cloud.call_names().count("attach") == 2


def test_unresolvable_region_is_invalid_input(recorded_state, monkeypatch):
    monkeypatch.setattr(settings, "region", "")

    def factory(region):
        raise NoRegionError()

    deps = Collaborators(resolver=FakeResolver(), cloud_factory=factory, prober=FakeProber())

    assert handle_role("active", deps) == EXIT_INVALID_INPUT


def test_out_of_range_prefix_is_invalid_input(caplog):
    write_state(settings.state_file, PersistedState(resource_id="nic-1", vip="10.0.0.50", subnet_prefix_length=33))
    cloud = FakeCloud(owner="i-aaa")

    with caplog.at_level(logging.ERROR, logger="failover.notify"):
        assert handle_role("active", _deps(cloud)) == EXIT_INVALID_INPUT

    assert cloud.calls == []
    assert any("invalid request" in r.getMessage() for r in caplog.records)


def test_region_from_settings_then_metadata(recorded_state, monkeypatch):
    regions = []
    handle_role("standby", _deps(FakeCloud(), regions=regions))
    monkeypatch.setattr(settings, "region", "")
    handle_role("standby", _deps(FakeCloud(), regions=regions))

    assert regions == ["us-east-1", "eu-west-1"]


def test_single_outcome_line(recorded_state, caplog):
    cloud = FakeCloud(owner="i-aaa")

    with caplog.at_level(logging.INFO, logger="failover.notify"):
        handle_role("active", _deps(cloud))

    outcomes = [r for r in caplog.records if r.name == "failover.notify" and hasattr(r, "outcome")]
    assert len(outcomes) == 1
    assert outcomes[0].outcome == "converged"
    assert outcomes[0].resource_id == "nic-1"
    assert outcomes[0].action == "claim"


def test_main_parses_single_positional(monkeypatch):
    seen = []
    monkeypatch.setattr(notify, "handle_role", lambda token: seen.append(token) or EXIT_OK)

    assert notify.main(["backup"]) == EXIT_OK
    assert seen == ["backup"]
