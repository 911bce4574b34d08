from __future__ import annotations

import base64
import logging
from urllib.parse import urlencode

from .auth_inputs import ARTIFACT_CONFIG, ARTIFACT_TOKEN, CredentialRequest, RemoteEndpoint
from .cli_shared import DEFAULT_HTTP_TIMEOUT_SECONDS, ExchangeFailed, ValidationFailed
from .transport import TransportConfig, TransportFailure, _http_get
from .trust import TrustStore, build_trust_store, fetch_ca

logger = logging.getLogger(__name__)

HTTP_CREATED = 201


def _basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _exchange_url(endpoint: RemoteEndpoint, request: CredentialRequest) -> str:
    if request.artifact == ARTIFACT_TOKEN:
        if request.scopes:
            return endpoint.token_url + "?" + urlencode({"scopes": request.scopes})
        return endpoint.token_url
    if request.artifact == ARTIFACT_CONFIG:
        return endpoint.config_url
    raise ValidationFailed(f"unknown artifact {request.artifact!r} (expected token or config)")


def _transport_for(
    request: CredentialRequest,
    trust_store: TrustStore | None,
    *,
    timeout_seconds: float,
) -> TransportConfig:
    if request.insecure:
        return TransportConfig.insecure(use_proxy=request.use_proxy, timeout_seconds=timeout_seconds)
    return TransportConfig.strict(
        trust_store or TrustStore(),
        use_proxy=request.use_proxy,
        timeout_seconds=timeout_seconds,
    )


def exchange(
    endpoint: RemoteEndpoint,
    request: CredentialRequest,
    trust_store: TrustStore | None,
    *,
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> bytes:
    """Trade username/password for a token or kubeconfig bundle.

    Issues exactly one GET; only ``201 Created`` counts as success.
    """
    url = _exchange_url(endpoint, request)
    transport = _transport_for(request, trust_store, timeout_seconds=timeout_seconds)
    headers = {"authorization": _basic_auth_header(request.username, request.password)}
    try:
        status, _hdrs, raw = _http_get(url=url, headers=headers, transport=transport)
    except TransportFailure as e:
        raise ExchangeFailed(f"{request.artifact} request failed: {e}") from e
    if status != HTTP_CREATED:
        text = raw.decode("utf-8", errors="replace").strip()
        detail = f" body={text}" if text else ""
        raise ExchangeFailed(
            f"error http {status} during authentication ({request.artifact} request){detail}",
            status=status,
            body=raw,
        )
    return raw


def acquire(
    endpoint: RemoteEndpoint,
    request: CredentialRequest,
    *,
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> bytes:
    """Bootstrap trust from the server CA, then run the credential exchange."""
    ca = fetch_ca(endpoint, use_proxy=request.use_proxy, timeout_seconds=timeout_seconds)
    trust_store = None if request.insecure else build_trust_store(ca)
    logger.debug("exchanging credentials for %s at %s", request.artifact, endpoint.base_url)
    return exchange(endpoint, request, trust_store, timeout_seconds=timeout_seconds)
