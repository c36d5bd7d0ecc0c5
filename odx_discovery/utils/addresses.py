"""
Validation for user-entered server addresses

Accepted forms: IPv4:port and domain:port.
"""

import re
from typing import Optional

from odx_discovery.protocol.models import Address

IPV4_PATTERN = re.compile(r'^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$')
DOMAIN_PATTERN = re.compile(
    r'^([a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?\.)*[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$'
)


def is_valid_ipv4(ip: str) -> bool:
    match = IPV4_PATTERN.match(ip)
    if not match:
        return False
    return all(0 <= int(octet) <= 255 for octet in match.groups())


def is_valid_domain(domain: str) -> bool:
    if len(domain) < 2 or not DOMAIN_PATTERN.match(domain):
        return False
    return all(len(label) <= 63 for label in domain.split('.'))


def is_valid_port(port: str) -> bool:
    if not port.isdigit():
        return False
    return 1 <= int(port) <= 65535


def validate_custom_server_address(address: str) -> Optional[str]:
    """
    Check a custom server address.

    Returns:
        Error message, or None when the address is valid
    """
    if not address or not address.strip():
        return 'Address cannot be empty'

    trimmed = address.strip()
    if ':' not in trimmed:
        return 'Address must include port (format: IP:port or domain:port)'

    host, _, port = trimmed.rpartition(':')
    if not is_valid_port(port):
        return 'Port must be a number between 1 and 65535'

    if not is_valid_ipv4(host) and not is_valid_domain(host):
        return 'Invalid IP address or domain name'

    return None


def parse_custom_server_address(address: str) -> Optional[Address]:
    """'host:port' -> Address, or None if invalid"""
    if validate_custom_server_address(address) is not None:
        return None
    host, _, port = address.strip().rpartition(':')
    return Address(host, int(port))
