"""Floating resource data models.

These Pydantic models describe the movable network identity, the live
control-plane view of where it is attached, and the request/result pair
exchanged between the role-transition adapter and the reconciler.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Role token delivered by the VRRP daemon."""
    ACTIVE = "active"
    STANDBY = "standby"
    FAULT = "fault"


class Action(str, Enum):
    """Reconciler action."""
    CLAIM = "claim"
    RELEASE = "release"


class Step(str, Enum):
    """Single convergence step produced by the planner."""
    DETACH = "detach"
    ATTACH = "attach"
    WAIT_LOCAL = "wait_local"
    ASSOCIATE = "associate"
    DISASSOCIATE = "disassociate"


class Outcome(str, Enum):
    """Final reconciliation outcome."""
    CONVERGED = "converged"  # Actions taken, resource in desired state
    NOOP = "noop"  # Already in desired state
    FAILED = "failed"


class FloatingResource(BaseModel):
    """The ENI carrying the VIP, plus its optional public address allocation."""
    model_config = ConfigDict(frozen=True)

    resource_id: str = Field(min_length=1)
    vip: str = Field(min_length=1)
    allocation_id: str | None = None


class AttachmentState(BaseModel):
    """Control-plane view of a floating resource at one instant.

    ``attached_instance_id`` is None while nobody owns the resource, which is
    a normal state during a peer's detach.
    """
    resource_id: str
    attached_instance_id: str | None = None
    attachment_id: str | None = None
    attachment_status: str | None = None  # attaching/attached/detaching
    is_address_associated: bool = False
    association_id: str | None = None

    def attached_to(self, instance_id: str) -> bool:
        """True while ``instance_id`` holds the resource and is not letting it go."""
        return self.attached_instance_id == instance_id and self.attachment_status != "detaching"


class NodeIdentity(BaseModel):
    """Who the invoking node is, per the local metadata service."""
    model_config = ConfigDict(frozen=True)

    instance_id: str
    local_primary_ip: str
    region: str | None = None


class ReconcileRequest(BaseModel):
    """Everything the reconciler needs for a single run."""
    action: Action
    resource: FloatingResource
    node: NodeIdentity
    interface_name: str
    subnet_prefix_length: int = Field(default=32, ge=0, le=32)


class ReconcileResult(BaseModel):
    """Outcome of a reconciliation run."""
    action: Action
    resource_id: str
    outcome: Outcome
    steps: list[str] = Field(default_factory=list)  # Steps actually executed
    attempts: int = 0  # Attach attempts made
    error: str | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome != Outcome.FAILED
