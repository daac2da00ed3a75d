#!/usr/bin/env python3
"""Operator CLI for the floating ENI/EIP.

Subcommands:
    claim       Attach the floating resource to this node now
    release     Detach it from this node now
    status      Show control-plane attachment and local VIP presence
    preflight   Check metadata, IAM role, state file and API access
    record      Write the state file (run once at provisioning time)
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable

from failover import __version__
from failover.cloud import CloudResourceClient
from failover.config import settings
from failover.exceptions import FailoverError, MetadataUnavailableError, StateFileError
from failover.logging_config import setup_failover_logging
from failover.metadata import IdentityResolver, MetadataClient
from failover.network.prober import IpRouteProber, NetworkProber
from failover.notify import EXIT_FAILED, EXIT_INVALID_INPUT, EXIT_OK, Collaborators, run_action
from failover.reconciler import AUTO_INTERFACE
from failover.schemas import Action
from failover.state_file import PersistedState, load_state, write_state

logger = logging.getLogger(__name__)


def _resolve_interface(state: PersistedState, prober: NetworkProber) -> str | None:
    interface = state.interface_name or settings.interface_name
    if interface == AUTO_INTERFACE:
        return prober.detect_interface()
    return interface


def cmd_status(args, collaborators: Collaborators | None = None) -> int:
    deps = collaborators or Collaborators()
    state = load_state(settings.state_file, settings.vip)
    identity = (deps.resolver or IdentityResolver()).resolve()
    cloud = deps.cloud_factory(settings.region or state.region or identity.region)
    prober = deps.prober or IpRouteProber()

    observed = cloud.describe_attachment(state.resource_id, state.allocation_id)
    interface = _resolve_interface(state, prober)
    report = {
        "instance_id": identity.instance_id,
        "resource": state.floating_resource().model_dump(),
        "attachment": observed.model_dump(),
        "owned_by_this_node": observed.attached_to(identity.instance_id),
        "interface": interface,
        "vip_present": bool(interface) and prober.has_address(interface, state.vip),
    }
    print(json.dumps(report, indent=2))
    return EXIT_OK


def cmd_preflight(
    args,
    metadata: MetadataClient | None = None,
    cloud_factory: Callable[[str | None], CloudResourceClient] = CloudResourceClient.for_region,
) -> int:
    metadata = metadata or MetadataClient()
    problems: list[str] = []

    try:
        identity = IdentityResolver(metadata).resolve()
        logger.info(f"Instance ID: {identity.instance_id} ({identity.local_primary_ip})")
        role = metadata.iam_role()
    except MetadataUnavailableError as e:
        logger.error(f"Metadata service: {e}")
        return EXIT_FAILED

    if role:
        logger.info(f"Attached IAM role: {role}")
    else:
        problems.append("No IAM role attached to this instance")

    try:
        state = load_state(settings.state_file, settings.vip)
        logger.info(f"State file {settings.state_file}: ENI {state.resource_id}, VIP {state.vip}")
    except StateFileError as e:
        problems.append(str(e))
        state = None

    if state is not None:
        region = settings.region or state.region or identity.region
        try:
            observed = cloud_factory(region).describe_attachment(state.resource_id, state.allocation_id)
            logger.info(f"ENI {state.resource_id} owner: {observed.attached_instance_id or 'none'}")
        except FailoverError as e:
            problems.append(f"Cannot describe {state.resource_id}: {e}")

    for problem in problems:
        logger.error(f"Preflight: {problem}")
    if problems:
        return EXIT_FAILED
    logger.info("Preflight checks passed")
    return EXIT_OK


def cmd_record(args) -> int:
    state = PersistedState(
        resource_id=args.resource_id,
        vip=args.vip,
        allocation_id=args.allocation_id,
        interface_name=args.interface,
        subnet_prefix_length=args.prefix_length,
        region=args.region,
    )
    write_state(args.path or settings.state_file, state)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vip-failover",
        description="Manage the floating ENI/EIP carrying the VIP.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("claim", help="attach the floating resource to this node")
    sub.add_parser("release", help="detach the floating resource from this node")
    sub.add_parser("status", help="show attachment and local VIP state as JSON")
    sub.add_parser("preflight", help="verify this node can manage the floating resource")

    record = sub.add_parser("record", help="write the floating resource state file")
    record.add_argument("--resource-id", required=True, help="ENI id (eni-...)")
    record.add_argument("--vip", required=True, help="private VIP carried by the ENI")
    record.add_argument("--allocation-id", default=None, help="Elastic IP allocation id")
    record.add_argument("--interface", default=None, help="local interface name (default: auto)")
    record.add_argument("--prefix-length", type=int, default=None, help="VIP prefix length")
    record.add_argument("--region", default=None, help="AWS region")
    record.add_argument("--path", default=None, help=f"state file (default: {settings.state_file})")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_failover_logging()

    try:
        if args.command == "claim":
            return run_action(Action.CLAIM)
        if args.command == "release":
            return run_action(Action.RELEASE)
        if args.command == "status":
            return cmd_status(args)
        if args.command == "preflight":
            return cmd_preflight(args)
        return cmd_record(args)
    except StateFileError as e:
        logger.error(str(e))
        return EXIT_INVALID_INPUT
    except FailoverError as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
