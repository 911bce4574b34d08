"""Read the claims of a kubi-issued JWT for display.

Nothing here checks the signature segment. A token reported as valid has
simply not reached its ``exp`` yet; it may still be forged, revoked or
issued by someone else. Use this for diagnostics only, never to decide
whether to trust a token.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .cli_shared import MalformedToken


@dataclass(frozen=True)
class NamespaceGrant:
    namespace: str
    role: str


@dataclass(frozen=True)
class TokenClaims:
    exp: int = 0
    auths: tuple[NamespaceGrant, ...] = ()
    admin_access: bool = False
    issuer: str = ""
    user: str = ""
    valid: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def expires_at(self) -> datetime | None:
        try:
            return datetime.fromtimestamp(self.exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    @property
    def namespaces(self) -> list[str]:
        return [a.namespace for a in self.auths if a.namespace]

    def seconds_to_expiry(self, *, now: float | None = None) -> int:
        current = time.time() if now is None else now
        return int(self.exp - current)


def pad_base64(segment: str) -> str:
    """Right-pad ``segment`` with ``=`` to the next multiple of 4.

    JWT segments are issued without padding, while the decoder requires it.
    """
    missing = len(segment) % 4
    if missing:
        segment += "=" * (4 - missing)
    return segment


def decode_segment(segment: str) -> bytes:
    padded = pad_base64(segment.strip())
    # altchars maps the URL-safe alphabet onto the standard one, so tokens
    # encoded with either decode the same way.
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def _as_str(val: Any) -> str:
    return val if isinstance(val, str) else ""


def _as_int(val: Any) -> int:
    if isinstance(val, bool):
        return 0
    if isinstance(val, int):
        return val
    if isinstance(val, float):
        return int(val)
    return 0


def _parse_auths(val: Any) -> tuple[NamespaceGrant, ...]:
    if not isinstance(val, list):
        return ()
    out: list[NamespaceGrant] = []
    for item in val:
        if not isinstance(item, dict):
            continue
        out.append(NamespaceGrant(namespace=_as_str(item.get("namespace")), role=_as_str(item.get("role"))))
    return tuple(out)


def token_claims_payload(token: str) -> dict[str, Any]:
    parts = (token or "").strip().split(".")
    if len(parts) != 3:
        raise MalformedToken(f"invalid token: expected 3 dot-separated segments, got {len(parts)}")
    try:
        raw = decode_segment(parts[1])
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise MalformedToken(f"invalid token claims encoding: {e}") from e
    try:
        val = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedToken(f"invalid token claims: {e}") from e
    if not isinstance(val, dict):
        raise MalformedToken("invalid token claims: expected JSON object")
    return val


def inspect_token(token: str, *, now: float | None = None) -> TokenClaims:
    claims = token_claims_payload(token)
    exp = _as_int(claims.get("exp"))
    current = time.time() if now is None else now
    return TokenClaims(
        exp=exp,
        auths=_parse_auths(claims.get("auths")),
        admin_access=claims.get("adminAccess") is True,
        issuer=_as_str(claims.get("iss")),
        user=_as_str(claims.get("user")) or _as_str(claims.get("sub")),
        valid=current < exp,
        raw=claims,
    )


def claims_report(claims: TokenClaims, *, now: float | None = None) -> dict[str, Any]:
    expires_at = claims.expires_at
    return {
        "kind": "kubi.token.explain.v1",
        "user": claims.user,
        "issuer": claims.issuer,
        "adminAccess": claims.admin_access,
        "auths": [{"namespace": a.namespace, "role": a.role} for a in claims.auths],
        "exp": claims.exp,
        "expiresAt": expires_at.isoformat() if expires_at else None,
        "valid": claims.valid,
        "secondsToExpiry": claims.seconds_to_expiry(now=now),
        "signatureVerified": False,
    }
