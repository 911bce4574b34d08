from __future__ import annotations

import ssl
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.error import HTTPError, URLError
from urllib.request import HTTPSHandler, OpenerDirector, ProxyHandler, Request, build_opener, getproxies

from .cli_shared import DEFAULT_HTTP_TIMEOUT_SECONDS, OpError

if TYPE_CHECKING:
    from .trust import TrustStore


class TransportFailure(OpError):
    """The request never produced an HTTP response (DNS, TCP, TLS, timeout)."""


@dataclass(frozen=True)
class TransportConfig:
    """TLS and proxy policy for a single request.

    Instances are immutable and each request builds its own opener from one,
    so the CA fetch and the authenticated exchange never share state.
    """

    verify: bool
    trust_store: "TrustStore | None" = None
    use_proxy: bool = False
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS

    @classmethod
    def insecure(cls, *, use_proxy: bool = False, timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS) -> "TransportConfig":
        return cls(verify=False, use_proxy=use_proxy, timeout_seconds=timeout_seconds)

    @classmethod
    def strict(
        cls,
        trust_store: "TrustStore",
        *,
        use_proxy: bool = False,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> "TransportConfig":
        return cls(verify=True, trust_store=trust_store, use_proxy=use_proxy, timeout_seconds=timeout_seconds)

    def ssl_context(self) -> ssl.SSLContext:
        if not self.verify:
            ctx = ssl.create_default_context()
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            return ctx
        if self.trust_store is not None:
            return self.trust_store.ssl_context()
        return ssl.create_default_context()

    def proxies(self) -> dict[str, str]:
        if not self.use_proxy:
            return {}
        return dict(getproxies())


def _build_opener(transport: TransportConfig) -> OpenerDirector:
    # An explicit ProxyHandler({}) disables the environment proxies urllib
    # would otherwise pick up on its own.
    return build_opener(
        ProxyHandler(transport.proxies()),
        HTTPSHandler(context=transport.ssl_context()),
    )


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    transport: TransportConfig,
    body: bytes | None = None,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    opener = _build_opener(transport)
    try:
        with opener.open(req, timeout=transport.timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers or {}).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise TransportFailure(f"http request to {url} failed: {e.reason}") from e
    except OSError as e:
        raise TransportFailure(f"http request to {url} failed: {e}") from e


def _http_get(
    *,
    url: str,
    headers: dict[str, str],
    transport: TransportConfig,
) -> tuple[int, dict[str, str], bytes]:
    return _http_request(method="GET", url=url, headers=headers, transport=transport)
