"""Per-owner rate limits for the sync endpoints.

Push and pull operate on one owner's records, so the bucket is the
authenticated owner. Requests without a valid token (which the route
rejects anyway) share a bucket per client address.
"""

import ipaddress

from fastapi import HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address

from .auth import decode_token
from .config import get_settings
from .logging_config import get_logger

logger = get_logger("rate_limit")


def _peer_is_proxy(peer: str, proxy_cidrs: list[str]) -> bool:
    try:
        addr = ipaddress.ip_address(peer)
    except ValueError:
        return False
    for cidr in proxy_cidrs:
        try:
            if addr in ipaddress.ip_network(cidr, strict=False):
                return True
        except ValueError:
            logger.warning(f"Ignoring malformed proxy CIDR in settings: {cidr}")
    return False


def client_address(request) -> str:
    """Address of the calling device.

    ``X-Forwarded-For`` is read only when the direct peer is one of the
    configured ``trusted_proxy_cidrs``; otherwise anyone could pick their
    own bucket by sending the header.
    """
    peer = get_remote_address(request)
    if _peer_is_proxy(peer, get_settings().trusted_proxy_cidrs):
        forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        if forwarded:
            return forwarded
    return peer


def sync_rate_key(request) -> str:
    """Bucket key: ``owner:<sub>`` for a valid bearer token, else ``ip:<address>``."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            owner_id = decode_token(token.strip(), get_settings()).get("sub")
        except HTTPException:
            owner_id = None
        if isinstance(owner_id, str) and owner_id:
            return f"owner:{owner_id}"
    return f"ip:{client_address(request)}"


def sync_rate_limit() -> str:
    """Per-owner limit for the sync endpoints, read from settings."""
    return get_settings().sync_rate_limit


limiter = Limiter(key_func=sync_rate_key, enabled=get_settings().rate_limit_enabled)
