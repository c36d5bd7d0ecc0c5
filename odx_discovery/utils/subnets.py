"""
Subnet enumeration for local server discovery

Turns the host's network interfaces into a finite list of candidate
hosts to probe.
"""

import ipaddress
import logging
import socket
import time
from typing import Callable, Dict, List, Optional

import psutil

from odx_discovery.protocol.models import NetworkInterface

logger = logging.getLogger(__name__)

PRIVATE_NETWORKS = (
    ipaddress.IPv4Network('10.0.0.0/8'),
    ipaddress.IPv4Network('172.16.0.0/12'),
    ipaddress.IPv4Network('192.168.0.0/16'),
    ipaddress.IPv4Network('169.254.0.0/16'),
)

# Interface info rarely changes
DEFAULT_INTERFACE_TTL = 3 * 24 * 60 * 60


def is_private_ip(ip: str) -> bool:
    """True for 10/8, 172.16/12, 192.168/16 and link-local 169.254/16"""
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return any(addr in network for network in PRIVATE_NETWORKS)


def get_local_networks(provider: Callable[[], Dict[str, list]] = None) -> List[NetworkInterface]:
    """
    List private IPv4, non-loopback interfaces.

    Args:
        provider: Callable shaped like psutil.net_if_addrs (for tests)

    Returns:
        NetworkInterface snapshots
    """
    provider = provider or psutil.net_if_addrs
    networks = []

    for name, addrs in provider().items():
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.address:
                continue
            if not is_private_ip(addr.address):
                continue

            if addr.netmask:
                try:
                    net = ipaddress.IPv4Network(f"{addr.address}/{addr.netmask}", strict=False)
                    cidr = f"{addr.address}/{net.prefixlen}"
                except ValueError:
                    logger.debug(f"[Subnets] Bad netmask {addr.netmask} on {name}")
                    continue
            else:
                cidr = f"{addr.address}/24"

            networks.append(NetworkInterface(
                name=name,
                address=addr.address,
                netmask=addr.netmask or '255.255.255.0',
                cidr=cidr,
            ))

    return networks


def expand_cidr(cidr: str) -> List[str]:
    """
    Expand a CIDR block into host addresses to probe.

    /24 gives .1-.254. /16 gives only the .0.x and .1.x blocks (508
    hosts). Any other prefix gives an empty list.
    """
    base, _, prefix_text = cidr.partition('/')
    try:
        prefix = int(prefix_text)
        parts = [int(p) for p in base.split('.')]
    except ValueError:
        logger.warning(f"[Subnets] Malformed CIDR {cidr!r}")
        return []
    if len(parts) != 4:
        logger.warning(f"[Subnets] Malformed CIDR {cidr!r}")
        return []

    if prefix == 24:
        return [f"{parts[0]}.{parts[1]}.{parts[2]}.{i}" for i in range(1, 255)]

    if prefix == 16:
        return [
            f"{parts[0]}.{parts[1]}.{j}.{i}"
            for j in range(2)
            for i in range(1, 255)
        ]

    logger.warning(f"[Subnets] Unsupported prefix /{prefix} for {cidr}, only /24 and /16 are scanned")
    return []


def candidate_hosts(networks: List[NetworkInterface]) -> List[str]:
    """All hosts to probe across interfaces, first occurrence wins"""
    seen = set()
    hosts = []
    for network in networks:
        for host in expand_cidr(network.cidr):
            if host not in seen:
                seen.add(host)
                hosts.append(host)
    return hosts


class InterfaceCache:
    """Caches the interface snapshot for a long TTL"""

    def __init__(self, ttl_seconds: float = DEFAULT_INTERFACE_TTL, provider=None,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.provider = provider
        self.clock = clock
        self._networks: Optional[List[NetworkInterface]] = None
        self._fetched_at = 0.0

    def get(self) -> List[NetworkInterface]:
        now = self.clock()
        if self._networks is None or now - self._fetched_at >= self.ttl_seconds:
            try:
                self._networks = get_local_networks(self.provider)
            except OSError as e:
                logger.error(f"[Subnets] Interface enumeration failed: {e}")
                return []
            self._fetched_at = now
            logger.info(
                f"[Subnets] Detected {len(self._networks)} private network(s): "
                f"{', '.join(n.cidr for n in self._networks) or 'none'}"
            )
        return list(self._networks)

    def invalidate(self):
        self._networks = None
