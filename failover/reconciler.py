"""Floating-resource reconciliation.

Converges the ENI attachment (and its Elastic IP association) to what the
invoking node's role requires. There is no lock between the two nodes: the
control plane is read fresh on every run, the planner decides what is
missing, and every action is safe to repeat. Running Claim twice, or Claim
concurrently with the peer's Release, ends with a single owner.

Two retry layers exist and are configured separately:

- ``RetryPolicy`` (cloud.py) backs off individual API calls on throttling.
- ``ReconcilePolicy`` here covers settle time after a detach, the number of
  attach attempts when the resource is still in use, and the local VIP wait.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from failover.cloud import CloudResourceClient
from failover.config import settings
from failover.exceptions import (
    AttachConflictError,
    FailoverError,
    LocalNetworkError,
    ReconcileTimeoutError,
)
from failover.network.prober import NetworkProber
from failover.schemas import (
    Action,
    AttachmentState,
    Outcome,
    ReconcileRequest,
    ReconcileResult,
    Step,
)

logger = logging.getLogger(__name__)

AUTO_INTERFACE = "auto"

# Steps that change ownership or local configuration
_MUTATING_STEPS = {"detach", "attach", "add_address", "disassociate"}


@dataclass(frozen=True)
class ReconcilePolicy:
    """Timing and retry budget for a reconciliation run (seconds)."""
    device_index: int = 1
    settle_interval: float = 5.0
    attach_attempts: int = 3
    local_wait_timeout: float = 30.0
    local_poll_interval: float = 3.0
    run_timeout: float = 75.0
    release_disassociate: bool = False

    @classmethod
    def from_settings(cls) -> "ReconcilePolicy":
        return cls(
            device_index=settings.device_index,
            settle_interval=settings.settle_interval,
            attach_attempts=max(1, settings.attach_attempts),
            local_wait_timeout=settings.local_wait_timeout,
            local_poll_interval=settings.local_poll_interval,
            run_timeout=settings.run_timeout,
            release_disassociate=settings.release_disassociate,
        )


def plan(
    action: Action,
    observed: AttachmentState,
    instance_id: str,
    has_allocation: bool,
    release_disassociate: bool = False,
) -> list[Step]:
    """Compute the steps that take ``observed`` to the state ``action`` wants.

    Pure function of its inputs; the executor may still adapt when the
    control plane changes underneath it (e.g. an attach conflict).
    """
    if action == Action.RELEASE:
        if not observed.attached_to(instance_id):
            # Unattached, already moved on, or already on its way out
            return []
        steps = []
        if release_disassociate and observed.association_id:
            steps.append(Step.DISASSOCIATE)
        steps.append(Step.DETACH)
        return steps

    steps = []
    if not observed.attached_to(instance_id):
        if observed.attached_instance_id and observed.attachment_status != "detaching":
            steps.append(Step.DETACH)
        steps.append(Step.ATTACH)
    steps.append(Step.WAIT_LOCAL)
    if has_allocation:
        # Always re-assert; a stale association may point elsewhere
        steps.append(Step.ASSOCIATE)
    return steps


class Deadline:
    """Run-wide time budget. Sleeps never overrun it."""

    def __init__(self, timeout: float, clock: Callable[[], float], sleep: Callable[[float], None]):
        self._clock = clock
        self._sleep = sleep
        self._expires = clock() + timeout
        self.timeout = timeout

    def remaining(self) -> float:
        return self._expires - self._clock()

    def check(self, what: str) -> None:
        if self.remaining() <= 0:
            raise ReconcileTimeoutError(f"Run deadline of {self.timeout:.0f}s exceeded before {what}")

    def sleep(self, seconds: float, what: str) -> None:
        self.check(what)
        self._sleep(max(0.0, min(seconds, self.remaining())))


class Reconciler:
    """Executes Claim and Release against the cloud client and local prober."""

    def __init__(
        self,
        cloud: CloudResourceClient,
        prober: NetworkProber,
        policy: ReconcilePolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cloud = cloud
        self._prober = prober
        self._policy = policy or ReconcilePolicy.from_settings()
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """Run Claim or Release to completion. Never raises FailoverError."""
        started = self._clock()
        deadline = Deadline(self._policy.run_timeout, self._clock, self._sleep)
        result = ReconcileResult(
            action=request.action,
            resource_id=request.resource.resource_id,
            outcome=Outcome.FAILED,
        )
        try:
            with self._cloud.bounded_by(deadline.remaining):
                if request.action == Action.CLAIM:
                    self._claim(request, deadline, result)
                else:
                    self._release(request, deadline, result)
        except FailoverError as e:
            result.outcome = Outcome.FAILED
            result.error = str(e)
            logger.error(f"{request.action.value} of {request.resource.resource_id} failed: {e}")
        else:
            mutated = any(step in _MUTATING_STEPS for step in result.steps)
            result.outcome = Outcome.CONVERGED if mutated else Outcome.NOOP
        result.elapsed = round(self._clock() - started, 3)
        return result

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def _describe(self, request: ReconcileRequest, deadline: Deadline) -> AttachmentState:
        deadline.check("describe")
        resource = request.resource
        return self._cloud.describe_attachment(resource.resource_id, resource.allocation_id)

    def _claim(self, request: ReconcileRequest, deadline: Deadline, result: ReconcileResult) -> None:
        resource = request.resource
        me = request.node.instance_id
        observed = self._describe(request, deadline)
        steps = plan(Action.CLAIM, observed, me, resource.allocation_id is not None)
        logger.info(
            f"Claim {resource.resource_id}: owner={observed.attached_instance_id or 'none'} "
            f"plan={[s.value for s in steps]}"
        )

        if Step.ATTACH in steps:
            self._acquire(request, observed, deadline, result)
        else:
            logger.info(f"ENI {resource.resource_id} already attached to {me}")

        interface = self._wait_local(request, deadline, result)

        if Step.ASSOCIATE in steps:
            deadline.check("associate")
            association_id = self._cloud.associate_address(
                resource.allocation_id, resource.resource_id, resource.vip
            )
            result.steps.append("associate")
            logger.info(
                f"Associated {resource.allocation_id} with {resource.resource_id}/{resource.vip} "
                f"({association_id})"
            )

        logger.info(f"Claim of {resource.resource_id} converged on {me} ({interface})")

    def _acquire(
        self,
        request: ReconcileRequest,
        observed: AttachmentState,
        deadline: Deadline,
        result: ReconcileResult,
    ) -> None:
        """Detach from any foreign owner and attach to this node.

        Attach conflicts (resource still in use) are retried after the
        settle interval, re-reading ownership each time. Only a foreign
        attachment we have not already detached is detached again.
        """
        resource = request.resource
        me = request.node.instance_id
        detached: set[str] = set()
        attempts = self._policy.attach_attempts

        for attempt in range(1, attempts + 1):
            if observed.attached_to(me):
                logger.info(f"ENI {resource.resource_id} became attached to {me}")
                return

            owner = observed.attached_instance_id
            if owner and observed.attachment_id not in detached:
                if observed.attachment_status == "detaching":
                    # Also covers our own earlier Release still in flight
                    logger.info(f"ENI {resource.resource_id} is detaching from {owner}, waiting")
                else:
                    deadline.check("detach")
                    logger.info(
                        f"Detaching ENI {resource.resource_id} from {owner} "
                        f"(attachment {observed.attachment_id})"
                    )
                    try:
                        self._cloud.detach(observed.attachment_id, force=True)
                    except AttachConflictError as e:
                        logger.warning(f"Detach of {observed.attachment_id} already in progress: {e}")
                    else:
                        result.steps.append("detach")
                detached.add(observed.attachment_id)
                deadline.sleep(self._policy.settle_interval, "attach")

            deadline.check("attach")
            result.attempts = attempt
            try:
                attachment_id = self._cloud.attach(resource.resource_id, me, self._policy.device_index)
            except AttachConflictError as e:
                if attempt >= attempts:
                    raise AttachConflictError(
                        f"ENI {resource.resource_id} still in use after {attempts} attach attempts: {e.message}",
                        e.operation,
                        e.code,
                    ) from e
                logger.warning(
                    f"Attach conflict on {resource.resource_id} (attempt {attempt}/{attempts}), "
                    f"retrying in {self._policy.settle_interval:.0f}s: {e.message}"
                )
                deadline.sleep(self._policy.settle_interval, "attach retry")
                observed = self._describe(request, deadline)
                continue

            result.steps.append("attach")
            logger.info(
                f"Attached ENI {resource.resource_id} to {me} at device index "
                f"{self._policy.device_index} ({attachment_id})"
            )
            return

    def _resolve_interface(self, request: ReconcileRequest) -> str | None:
        if request.interface_name != AUTO_INTERFACE:
            return request.interface_name
        candidate = self._prober.detect_interface()
        if candidate and self._prober.has_address(candidate, request.node.local_primary_ip):
            # Still the primary NIC; the ENI has not been hot-plugged yet
            return None
        return candidate

    def _wait_local(self, request: ReconcileRequest, deadline: Deadline, result: ReconcileResult) -> str:
        """Wait for the VIP on the local interface, assigning it when missing."""
        vip = request.resource.vip
        result.steps.append("wait_local")
        wait_expires = self._clock() + self._policy.local_wait_timeout
        polls = 0

        while True:
            polls += 1
            interface = self._resolve_interface(request)
            if interface and self._prober.has_address(interface, vip):
                logger.info(f"VIP {vip} present on {interface}")
                return interface

            if interface and self._prober.link_exists(interface):
                # Attached but not configured by the OS: assign it ourselves
                try:
                    self._prober.set_link_up(interface)
                    self._prober.add_address(interface, vip, request.subnet_prefix_length)
                except LocalNetworkError as e:
                    logger.warning(f"Could not assign VIP {vip}: {e}")
                else:
                    if "add_address" not in result.steps:
                        result.steps.append("add_address")
                    if self._prober.has_address(interface, vip):
                        logger.info(f"VIP {vip} assigned to {interface}")
                        return interface

            waited = self._policy.local_wait_timeout - (wait_expires - self._clock())
            if self._clock() + self._policy.local_poll_interval > wait_expires:
                raise ReconcileTimeoutError(
                    f"VIP {vip} did not appear on {request.interface_name} "
                    f"within {self._policy.local_wait_timeout:.0f}s"
                )
            logger.info(f"Waiting for VIP {vip} on {interface or request.interface_name}... {waited:.0f}s elapsed")
            deadline.sleep(self._policy.local_poll_interval, "local VIP check")

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def _release(self, request: ReconcileRequest, deadline: Deadline, result: ReconcileResult) -> None:
        resource = request.resource
        me = request.node.instance_id
        observed = self._describe(request, deadline)
        steps = plan(
            Action.RELEASE,
            observed,
            me,
            resource.allocation_id is not None,
            release_disassociate=self._policy.release_disassociate,
        )
        if not steps:
            logger.info(
                f"Release {resource.resource_id}: nothing to do "
                f"(owner={observed.attached_instance_id or 'none'}, status={observed.attachment_status})"
            )
            return

        if Step.DISASSOCIATE in steps:
            deadline.check("disassociate")
            self._cloud.disassociate_address(observed.association_id)
            result.steps.append("disassociate")
            logger.info(f"Disassociated {resource.allocation_id} ({observed.association_id})")

        deadline.check("detach")
        self._cloud.detach(observed.attachment_id, force=True)
        result.steps.append("detach")
        logger.info(f"Detached ENI {resource.resource_id} from {me} (attachment {observed.attachment_id})")
