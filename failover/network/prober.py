"""Local network stack inspection for the VIP.

After the control plane reports the ENI attached, the kernel still has to
hot-plug the interface and (depending on the distro) configure its address.
The prober answers "is the VIP on this interface yet?" and, when it is not,
assigns it directly.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from failover.exceptions import LocalNetworkError
from failover.network.cmd import ip, ip_link_exists

logger = logging.getLogger(__name__)

# Link name prefixes that never carry the ENI
VIRTUAL_LINK_PREFIXES = ("lo", "docker", "veth", "br-", "virbr", "tun", "tap")


class NetworkProber(ABC):
    """Narrow view of the local network stack used by the reconciler."""

    @abstractmethod
    def has_address(self, interface: str, address: str) -> bool:
        """Return True if ``address`` is configured on ``interface``."""

    @abstractmethod
    def add_address(self, interface: str, address: str, prefix_length: int) -> None:
        """Assign ``address/prefix_length`` to ``interface`` (no-op if present)."""

    @abstractmethod
    def link_exists(self, interface: str) -> bool:
        """Return True if the interface is known to the kernel."""

    @abstractmethod
    def set_link_up(self, interface: str) -> None:
        """Bring the interface administratively up."""

    @abstractmethod
    def detect_interface(self) -> str | None:
        """Guess the interface the ENI shows up as."""


def parse_ipv4_addresses(output: str) -> set[str]:
    """Extract IPv4 addresses from ``ip -o -4 addr show`` output."""
    addresses: set[str] = set()
    for line in output.splitlines():
        fields = line.split()
        for i, field in enumerate(fields[:-1]):
            if field == "inet":
                addresses.add(fields[i + 1].split("/")[0])
    return addresses


def parse_link_names(output: str) -> list[str]:
    """Extract link names from ``ip -o link show`` output."""
    names = []
    for line in output.splitlines():
        parts = line.split(": ")
        if len(parts) < 2:
            continue
        names.append(parts[1].split("@")[0].strip())
    return names


class IpRouteProber(NetworkProber):
    """:class:`NetworkProber` backed by iproute2."""

    def has_address(self, interface: str, address: str) -> bool:
        code, stdout, _ = ip("-o", "-4", "addr", "show", "dev", interface)
        if code != 0:
            # Interface not present (yet)
            return False
        return address in parse_ipv4_addresses(stdout)

    def add_address(self, interface: str, address: str, prefix_length: int) -> None:
        if self.has_address(interface, address):
            logger.debug(f"VIP {address} already present on {interface}")
            return
        cidr = f"{address}/{prefix_length}"
        code, _, stderr = ip("addr", "add", cidr, "dev", interface)
        if code != 0:
            if "File exists" in stderr:
                return
            raise LocalNetworkError(f"ip addr add {cidr} failed: {stderr.strip()}", interface)
        logger.info(f"Assigned VIP {cidr} to {interface}")

    def link_exists(self, interface: str) -> bool:
        return ip_link_exists(interface)

    def set_link_up(self, interface: str) -> None:
        code, _, stderr = ip("link", "set", interface, "up")
        if code != 0:
            raise LocalNetworkError(f"ip link set up failed: {stderr.strip()}", interface)

    def detect_interface(self) -> str | None:
        code, stdout, stderr = ip("-o", "link", "show")
        if code != 0:
            logger.warning(f"Cannot list links: {stderr.strip()}")
            return None
        candidates = sorted(
            name for name in parse_link_names(stdout)
            if not name.startswith(VIRTUAL_LINK_PREFIXES)
        )
        return candidates[-1] if candidates else None
