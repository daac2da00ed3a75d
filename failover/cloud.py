"""EC2 control-plane client for the floating ENI and its Elastic IP.

Each method is one blocking API call. Nothing is cached: the peer node may
change the attachment at any moment, so callers re-describe whenever they
need the current picture.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from failover.config import settings
from failover.exceptions import (
    AttachConflictError,
    CloudAPIError,
    CloudRetryExhaustedError,
    TransientCloudError,
)
from failover.schemas import AttachmentState

logger = logging.getLogger(__name__)

# Error codes that indicate throttling or momentary unavailability
TRANSIENT_ERROR_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
}

# Attach rejected because a previous attachment has not been released yet
CONFLICT_ERROR_CODES = {
    "InvalidNetworkInterface.InUse",
    "IncorrectState",
    "IncorrectInstanceState",
}

# The attachment or association was already removed (typically by the peer)
GONE_ERROR_CODES = {
    "InvalidAttachmentID.NotFound",
    "InvalidNetworkInterfaceAttachmentId.NotFound",
    "InvalidAssociationID.NotFound",
}

_CONNECTION_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff for individual control-plane calls.

    ``attempt_timeout`` is the longest a single attempt can block (connect
    plus read timeout); a retry is only started when the caller's remaining
    time covers it.
    """
    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 4.0
    attempt_timeout: float = 13.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.api_max_retries,
            backoff_base=settings.api_backoff_base,
            backoff_max=settings.api_backoff_max,
            attempt_timeout=settings.api_connect_timeout + settings.api_read_timeout,
        )

    def delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)


def translate_error(exc: Exception, operation: str) -> Exception:
    """Map a botocore exception onto the failover error hierarchy."""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in TRANSIENT_ERROR_CODES:
            return TransientCloudError(f"{operation}: {code}: {message}", operation, code)
        if code in CONFLICT_ERROR_CODES:
            return AttachConflictError(f"{operation}: {code}: {message}", operation, code)
        return CloudAPIError(f"{operation}: {code}: {message}", operation, code)
    if isinstance(exc, _CONNECTION_ERRORS):
        return TransientCloudError(f"{operation}: {exc}", operation)
    if isinstance(exc, BotoCoreError):
        return CloudAPIError(f"{operation}: {exc}", operation)
    return exc


def with_retry(
    func: Callable[..., Any],
    *args,
    operation: str = "call",
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    remaining: Callable[[], float] | None = None,
    **kwargs,
) -> Any:
    """Execute a control-plane call with exponential backoff.

    Retries on:
    - Throttling and service-unavailable error codes
    - Connection errors and timeouts

    Does not retry on attach conflicts (the reconciler owns those) or any
    other client error. When ``remaining`` is given it returns the seconds
    left in the caller's budget; retrying stops once the backoff plus
    another attempt no longer fits.
    """
    policy = policy or RetryPolicy.from_settings()

    for attempt in range(policy.max_retries + 1):
        try:
            return func(*args, **kwargs)
        except (ClientError, BotoCoreError) as e:
            error = translate_error(e, operation)
            if not isinstance(error, TransientCloudError):
                raise error from e
            if attempt >= policy.max_retries:
                logger.error(f"{operation} failed after {policy.max_retries + 1} attempts: {error}")
                raise CloudRetryExhaustedError(
                    f"{operation} failed after {policy.max_retries + 1} attempts: {error.message}",
                    operation,
                    error.code,
                ) from e
            delay = policy.delay(attempt)
            if remaining is not None:
                left = remaining()
                if left < delay + policy.attempt_timeout:
                    logger.error(
                        f"{operation} failed after {attempt + 1} attempts, "
                        f"{max(left, 0.0):.1f}s left in run: {error}"
                    )
                    raise CloudRetryExhaustedError(
                        f"{operation} failed after {attempt + 1} attempts, "
                        f"no time left for another before the run deadline: {error.message}",
                        operation,
                        error.code,
                    ) from e
            logger.warning(
                f"{operation} failed (attempt {attempt + 1}/{policy.max_retries + 1}), "
                f"retrying in {delay:.1f}s: {error.message}"
            )
            sleep(delay)


def build_ec2_client(region: str | None):
    """Create a boto3 EC2 client with SDK-level retries disabled."""
    config = BotoConfig(
        region_name=region or None,
        connect_timeout=settings.api_connect_timeout,
        read_timeout=settings.api_read_timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
    return boto3.client("ec2", config=config)


class CloudResourceClient:
    """Thin facade over the EC2 calls the reconciler needs."""

    def __init__(
        self,
        ec2: Any,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._ec2 = ec2
        self._policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._remaining: Callable[[], float] | None = None

    @classmethod
    def for_region(cls, region: str | None) -> "CloudResourceClient":
        return cls(build_ec2_client(region))

    @contextmanager
    def bounded_by(self, remaining: Callable[[], float]) -> Iterator[None]:
        """Limit API retries to the time ``remaining()`` reports."""
        previous, self._remaining = self._remaining, remaining
        try:
            yield
        finally:
            self._remaining = previous

    def _call(self, operation: str, **params) -> dict:
        method = getattr(self._ec2, operation)
        return with_retry(
            method,
            operation=operation,
            policy=self._policy,
            sleep=self._sleep,
            remaining=self._remaining,
            **params,
        )

    def describe_attachment(self, resource_id: str, allocation_id: str | None = None) -> AttachmentState:
        """Return the live attachment state of the ENI.

        A missing or ``detached`` attachment is reported as no owner.
        """
        response = self._call("describe_network_interfaces", NetworkInterfaceIds=[resource_id])
        interfaces = response.get("NetworkInterfaces", [])
        if not interfaces:
            raise CloudAPIError(
                f"describe_network_interfaces: {resource_id} not found",
                "describe_network_interfaces",
            )
        attachment = interfaces[0].get("Attachment") or {}
        status = attachment.get("Status")

        state = AttachmentState(resource_id=resource_id)
        if attachment and status != "detached":
            state.attached_instance_id = attachment.get("InstanceId")
            state.attachment_id = attachment.get("AttachmentId")
            state.attachment_status = status

        if allocation_id:
            addresses = self._call("describe_addresses", AllocationIds=[allocation_id]).get("Addresses", [])
            association_id = addresses[0].get("AssociationId") if addresses else None
            state.association_id = association_id
            state.is_address_associated = association_id is not None

        logger.debug(
            f"ENI {resource_id}: owner={state.attached_instance_id} "
            f"attachment={state.attachment_id} status={status} assoc={state.association_id}"
        )
        return state

    def detach(self, attachment_id: str, force: bool = True) -> None:
        """Detach by attachment id. An attachment that is already gone is not an error."""
        try:
            self._call("detach_network_interface", AttachmentId=attachment_id, Force=force)
        except CloudAPIError as e:
            if e.code not in GONE_ERROR_CODES:
                raise
            logger.info(f"Attachment {attachment_id} already released ({e.code})")

    def attach(self, resource_id: str, instance_id: str, device_index: int) -> str | None:
        """Attach the ENI; returns the new attachment id."""
        response = self._call(
            "attach_network_interface",
            NetworkInterfaceId=resource_id,
            InstanceId=instance_id,
            DeviceIndex=device_index,
        )
        return response.get("AttachmentId")

    def associate_address(self, allocation_id: str, resource_id: str, private_ip: str) -> str | None:
        """Bind the EIP to the ENI/VIP pair, taking it over from any stale association."""
        response = self._call(
            "associate_address",
            AllocationId=allocation_id,
            NetworkInterfaceId=resource_id,
            PrivateIpAddress=private_ip,
            AllowReassociation=True,
        )
        return response.get("AssociationId")

    def disassociate_address(self, association_id: str) -> None:
        try:
            self._call("disassociate_address", AssociationId=association_id)
        except CloudAPIError as e:
            if e.code not in GONE_ERROR_CODES:
                raise
            logger.info(f"Association {association_id} already removed ({e.code})")
