"""Rate limit identity resolution.

Maps an inbound request to the identity used as the rate limit key:
the authenticated user id when present, otherwise the client IP taken from
the header set by the trusted reverse proxy.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from chatquota.app.services.rate_limit.models import Tier
from chatquota.app.services.rate_limit.policies import tier_for

DEFAULT_CLIENT_IP_HEADER = "X-Original-Chat-Forwarded-For"
DEFAULT_FALLBACK_IP = "127.0.0.1"


@dataclass(frozen=True)
class CallerContext:
    """Who is calling, as established by the upstream auth layer."""
    user_id: Optional[str] = None
    tier: Tier = Tier.ANONYMOUS

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)

    @classmethod
    def from_state(cls, state: Any) -> "CallerContext":
        """Build from ``request.state`` attributes ``user_id`` and ``user_tier``."""
        user_id = getattr(state, "user_id", None) or None
        tier_name = getattr(state, "user_tier", None)
        return cls(user_id=user_id, tier=tier_for(bool(user_id), tier_name))


def _strip_port(address: str) -> str:
    if address.startswith("["):
        # Bracketed IPv6, optionally followed by a port: "[2001:db8::1]:443"
        end = address.find("]")
        return address[1:end] if end != -1 else address
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    # Bare IPv6 addresses carry no port
    return address


def get_client_ip(
    headers: Mapping[str, str],
    header_name: str = DEFAULT_CLIENT_IP_HEADER,
    fallback: str = DEFAULT_FALLBACK_IP,
) -> str:
    """Get client IP address from the trusted forwarding header.

    Only the first entry is used and any port is removed, e.g.
    ``"1.2.3.4:9999, 5.6.7.8"`` resolves to ``"1.2.3.4"``. A constant
    fallback keeps unresolvable clients on one shared key instead of
    leaving them unkeyed.
    """
    forwarded = headers.get(header_name)
    if not forwarded:
        return fallback
    first = forwarded.split(",")[0].strip()
    ip = _strip_port(first).strip()
    return ip or fallback


def resolve_identity(
    caller: CallerContext,
    headers: Mapping[str, str],
    header_name: str = DEFAULT_CLIENT_IP_HEADER,
    fallback: str = DEFAULT_FALLBACK_IP,
) -> str:
    """Rate limit identity for a caller; never empty."""
    if caller.user_id:
        return caller.user_id
    return get_client_ip(headers, header_name=header_name, fallback=fallback)
