"""Role-transition entry point invoked by keepalived.

keepalived runs ``vip-failover-notify active`` from ``notify_master`` and
``vip-failover-notify standby|fault`` from ``notify_backup``/``notify_fault``.
Only the exit status matters to keepalived; everything else goes to the log.

Exit codes:
    0  converged (or nothing to do)
    1  reconciliation failed; the next role re-evaluation retries
    2  bad role token or missing/invalid local state
    3  instance identity could not be resolved
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Callable

from botocore.exceptions import NoRegionError
from pydantic import ValidationError

from failover.cloud import CloudResourceClient
from failover.config import settings
from failover.exceptions import InvalidRoleError, MetadataUnavailableError, StateFileError
from failover.logging_config import setup_failover_logging
from failover.metadata import IdentityResolver
from failover.network.prober import IpRouteProber, NetworkProber
from failover.reconciler import Reconciler
from failover.schemas import Action, NodeIdentity, ReconcileRequest, ReconcileResult, Role
from failover.state_file import PersistedState, load_state

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_INPUT = 2
EXIT_IDENTITY = 3

# keepalived's own state names are accepted as aliases
ROLE_TOKENS: dict[str, Role] = {
    "active": Role.ACTIVE,
    "master": Role.ACTIVE,
    "standby": Role.STANDBY,
    "backup": Role.STANDBY,
    "fault": Role.FAULT,
}

ROLE_ACTIONS: dict[Role, Action] = {
    Role.ACTIVE: Action.CLAIM,
    Role.STANDBY: Action.RELEASE,
    Role.FAULT: Action.RELEASE,
}


def parse_role(token: str) -> Role:
    try:
        return ROLE_TOKENS[token.strip().lower()]
    except KeyError:
        raise InvalidRoleError(token) from None


def action_for_role(role: Role) -> Action:
    return ROLE_ACTIONS[role]


def build_request(action: Action, state: PersistedState, identity: NodeIdentity) -> ReconcileRequest:
    """Combine persisted state, settings and identity into a request.

    The state file wins over settings for the interface and prefix length,
    since it records what provisioning actually set up on this node.
    """
    return ReconcileRequest(
        action=action,
        resource=state.floating_resource(),
        node=identity,
        interface_name=state.interface_name or settings.interface_name,
        subnet_prefix_length=(
            state.subnet_prefix_length
            if state.subnet_prefix_length is not None
            else settings.subnet_prefix_length
        ),
    )


@dataclass
class Collaborators:
    """External dependencies of a run, replaceable in tests."""
    resolver: IdentityResolver | None = None
    cloud_factory: Callable[[str | None], CloudResourceClient] = CloudResourceClient.for_region
    prober: NetworkProber | None = None


def run_action(action: Action, collaborators: Collaborators | None = None) -> int:
    """Resolve inputs, reconcile, log one outcome line and return an exit code."""
    deps = collaborators or Collaborators()

    try:
        state = load_state(settings.state_file, settings.vip)
    except StateFileError as e:
        logger.error(f"Cannot {action.value}: {e}")
        return EXIT_INVALID_INPUT

    resolver = deps.resolver or IdentityResolver()
    try:
        identity = resolver.resolve()
    except MetadataUnavailableError as e:
        logger.error(f"Cannot {action.value} {state.resource_id}: identity resolution failed: {e}")
        return EXIT_IDENTITY

    setup_failover_logging(instance_id=identity.instance_id)

    try:
        request = build_request(action, state, identity)
    except ValidationError as e:
        logger.error(f"Cannot {action.value} {state.resource_id}: invalid request: {e}")
        return EXIT_INVALID_INPUT

    region = settings.region or state.region or identity.region
    try:
        cloud = deps.cloud_factory(region)
    except NoRegionError as e:
        logger.error(f"Cannot {action.value} {state.resource_id}: {e}; set FAILOVER_REGION")
        return EXIT_INVALID_INPUT

    reconciler = Reconciler(cloud, deps.prober or IpRouteProber())
    result = reconciler.reconcile(request)
    log_outcome(result)
    return EXIT_OK if result.ok else EXIT_FAILED


def log_outcome(result: ReconcileResult) -> None:
    """Emit the single per-invocation outcome line."""
    level = logging.INFO if result.ok else logging.ERROR
    logger.log(
        level,
        f"Failover {result.action.value} {result.resource_id}: {result.outcome.value} "
        f"in {result.elapsed:.1f}s",
        extra={
            "action": result.action.value,
            "resource_id": result.resource_id,
            "outcome": result.outcome.value,
            "steps": result.steps,
            "attempts": result.attempts,
            "error": result.error,
        },
    )


def handle_role(token: str, collaborators: Collaborators | None = None) -> int:
    try:
        role = parse_role(token)
    except InvalidRoleError as e:
        logger.error(f"{e}; expected one of {', '.join(sorted(ROLE_TOKENS))}")
        return EXIT_INVALID_INPUT
    action = action_for_role(role)
    logger.info(f"Role transition to {role.value}: {action.value}")
    return run_action(action, collaborators)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vip-failover-notify",
        description="Move the floating ENI/EIP according to a keepalived role transition.",
    )
    parser.add_argument("role", help="active, standby or fault")
    args = parser.parse_args(argv)

    setup_failover_logging()
    return handle_role(args.role)


if __name__ == "__main__":
    sys.exit(main())
