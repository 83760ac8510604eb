"""Client identity helpers."""
from __future__ import annotations

import logging
from typing import Mapping, Optional

LOGGER = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


def forwarded_address(headers: Mapping[str, str]) -> Optional[str]:
    """Return the first address listed in ``X-Forwarded-For``, if any."""

    raw = headers.get("x-forwarded-for") or ""
    for part in raw.split(","):
        part = part.strip()
        if part:
            return part
    return None


def client_identity(
    headers: Mapping[str, str],
    peer_host: Optional[str],
    *,
    trust_forwarded: bool = True,
) -> str:
    """Derive the rate limiting identity for a request.

    Prefers the forwarded address, then the socket peer. Requests without
    either share the ``unknown`` identity and therefore one quota.
    """

    if trust_forwarded and (address := forwarded_address(headers)):
        return address
    if peer_host and peer_host.strip():
        return peer_host.strip()
    LOGGER.debug("client address unavailable, using shared identity")
    return UNKNOWN_CLIENT
