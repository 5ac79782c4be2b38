"""Request utility functions for handling common request operations."""

import ipaddress
import logging

from fastapi import Request

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_IP = "127.0.0.1"


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """Get the client IP address from a request.

    Priority order:
    1. First entry of X-Forwarded-For (the originating client behind proxies)
    2. Direct client connection
    3. Loopback, when neither is available (e.g. in-process test transports)

    An X-Forwarded-For entry that is not a valid IP address is ignored.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
        if _is_valid_ip(client_ip):
            return client_ip
        logger.warning(f"Invalid IP in X-Forwarded-For header: {client_ip}")

    if request.client and request.client.host:
        return request.client.host

    return DEFAULT_CLIENT_IP


def get_user_agent(request: Request) -> str:
    """Get the User-Agent header, empty string when absent."""
    return request.headers.get("User-Agent", "")
