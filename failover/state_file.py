"""Persisted floating resource identity.

Provisioning records which ENI (and EIP allocation) this node pair manages in
a small JSON file on each node. The reconciler has no other way to learn it.
Older deployments wrote only the bare ENI id to a text file; that format is
still read when the VIP is supplied through settings.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, ValidationError

from failover.exceptions import StateFileError
from failover.schemas import FloatingResource

logger = logging.getLogger(__name__)


class PersistedState(BaseModel):
    """On-disk layout of the state file."""
    resource_id: str
    vip: str
    allocation_id: str | None = None
    interface_name: str | None = None
    subnet_prefix_length: int | None = None
    region: str | None = None

    def floating_resource(self) -> FloatingResource:
        return FloatingResource(
            resource_id=self.resource_id,
            vip=self.vip,
            allocation_id=self.allocation_id or None,
        )


def load_state(path: str, vip_override: str = "") -> PersistedState:
    """Read the state file.

    Args:
        path: State file location
        vip_override: VIP to use for a legacy bare-id file, or to override
            the recorded one

    Raises:
        StateFileError: If the file is missing, unreadable or invalid
    """
    try:
        raw = Path(path).read_text().strip()
    except FileNotFoundError:
        raise StateFileError("state file not found", path) from None
    except OSError as e:
        raise StateFileError(f"cannot read state file: {e}", path) from e

    if not raw:
        raise StateFileError("state file is empty", path)

    if not raw.startswith("{"):
        # Legacy format: just the ENI id
        if not vip_override:
            raise StateFileError("legacy state file needs FAILOVER_VIP to be set", path)
        logger.debug(f"Read legacy state file {path}")
        return PersistedState(resource_id=raw.split()[0], vip=vip_override)

    try:
        state = PersistedState.model_validate_json(raw)
    except ValidationError as e:
        raise StateFileError(f"invalid state file: {e.errors()[0]['msg']}", path) from e

    if vip_override and vip_override != state.vip:
        logger.warning(f"VIP override {vip_override} differs from recorded {state.vip}")
        state = state.model_copy(update={"vip": vip_override})
    return state


def write_state(path: str, state: PersistedState) -> None:
    """Atomically write the state file (mode 0644)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
    try:
        with os.fdopen(fd, "w") as fh:
            json.dump(state.model_dump(exclude_none=True), fh, indent=2)
            fh.write("\n")
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, target)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise
    logger.info(f"Recorded floating resource {state.resource_id} in {path}")
