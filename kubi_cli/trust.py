"""Trust bootstrap for a kubi server whose CA is not known yet.

The CA is fetched over an unverified channel: the certificate that would
validate that channel is exactly what is being downloaded. This is a
trust-on-first-use gap kept on purpose; making the fetch strict would need
the CA before it is known. Every later call verifies against the store built
from the fetched material plus the platform roots.
"""

from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass

from .auth_inputs import RemoteEndpoint
from .cli_shared import DEFAULT_HTTP_TIMEOUT_SECONDS, TrustBootstrapFailed
from .transport import TransportConfig, TransportFailure, _http_get

logger = logging.getLogger(__name__)

_PEM_MARKER = b"-----BEGIN"


def fetch_ca(
    endpoint: RemoteEndpoint,
    *,
    use_proxy: bool = False,
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> bytes:
    transport = TransportConfig.insecure(use_proxy=use_proxy, timeout_seconds=timeout_seconds)
    try:
        status, _hdrs, raw = _http_get(url=endpoint.ca_url, headers={}, transport=transport)
    except TransportFailure as e:
        raise TrustBootstrapFailed(f"fetching CA from {endpoint.ca_url} failed: {e}") from e
    if status < 200 or status >= 300:
        text = raw.decode("utf-8", errors="replace")
        raise TrustBootstrapFailed(f"fetching CA from {endpoint.ca_url} failed: status={status} body={text}")
    return raw


def _platform_context() -> ssl.SSLContext:
    try:
        return ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
    except ssl.SSLError as e:
        logger.warning("platform trust store unavailable (%s); starting from an empty root set", e)
        return ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)


def _append_ca(ctx: ssl.SSLContext, ca_bytes: bytes) -> bool:
    if not ca_bytes.strip():
        return False
    try:
        if _PEM_MARKER in ca_bytes:
            ctx.load_verify_locations(cadata=ca_bytes.decode("ascii"))
        else:
            ctx.load_verify_locations(cadata=ca_bytes)
    except (ssl.SSLError, ValueError, UnicodeDecodeError):
        return False
    return True


@dataclass(frozen=True)
class TrustStore:
    """Platform roots plus the CA fetched from the kubi server.

    ``ca_appended`` is False when the fetched bytes held no usable
    certificate; the store then trusts the platform roots only.
    """

    ca_bytes: bytes = b""
    ca_appended: bool = False

    def ssl_context(self) -> ssl.SSLContext:
        ctx = _platform_context()
        if self.ca_appended:
            _append_ca(ctx, self.ca_bytes)
        return ctx


def build_trust_store(ca_bytes: bytes) -> TrustStore:
    appended = _append_ca(_platform_context(), ca_bytes or b"")
    if not appended:
        logger.warning("no certs appended from the server CA, using system certs only")
    return TrustStore(ca_bytes=ca_bytes or b"", ca_appended=appended)
