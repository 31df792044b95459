"""Per-device rate limiting for the sync routes.

A request carrying the valid access token and an X-Client-ID header (or a
``clientId`` query parameter) is counted against that device, so several
devices behind one NAT keep separate budgets. Anything else, including every
request with a bad token, is counted against the caller's address.
"""

import hmac
import ipaddress
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("opsync.server.rate_limit")


@lru_cache
def _trusted_networks(cidrs: tuple[str, ...]) -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR {cidr!r}")
    return tuple(networks)


def _from_trusted_proxy(peer: str) -> bool:
    try:
        addr = ipaddress.ip_address(peer)
    except ValueError:
        return False
    networks = _trusted_networks(tuple(get_settings().trusted_proxy_cidrs))
    return any(addr in network for network in networks)


def get_client_ip(request) -> str:
    """Caller address; the leftmost X-Forwarded-For hop counts only behind a trusted proxy."""
    peer = get_remote_address(request)
    if _from_trusted_proxy(peer):
        hops = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",")]
        if hops[0]:
            return hops[0]
    return peer


def _has_valid_token(request) -> bool:
    token = request.headers.get("x-access-token")
    if not token:
        return False
    return hmac.compare_digest(token.encode(), get_settings().access_token.encode())


def get_rate_limit_key(request) -> str:
    """Bucket for ``request``: ``client:<id>`` for an authenticated device, else ``ip:<addr>``."""
    if _has_valid_token(request):
        client_id = request.headers.get("x-client-id") or request.query_params.get("clientId")
        if client_id:
            return f"client:{client_id}"
    return f"ip:{get_client_ip(request)}"


def sync_rate_limit() -> str:
    return get_settings().rate_limit


limiter = Limiter(key_func=get_rate_limit_key)
