from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence
from urllib.parse import urlparse

from .cli_shared import KUBI_PASSWORD, KUBI_URL, KUBI_USERNAME, ValidationFailed

ARTIFACT_TOKEN = "token"
ARTIFACT_CONFIG = "config"

TRUST_STRICT = "strict"
TRUST_INSECURE = "insecure"


@dataclass(frozen=True)
class RemoteEndpoint:
    base_url: str
    ca_path: str = "/ca"
    token_path: str = "/token"
    config_path: str = "/config"

    def _join(self, path: str) -> str:
        return self.base_url + "/" + path.lstrip("/")

    @property
    def ca_url(self) -> str:
        return self._join(self.ca_path)

    @property
    def token_url(self) -> str:
        return self._join(self.token_path)

    @property
    def config_url(self) -> str:
        return self._join(self.config_path)


@dataclass(frozen=True)
class BasicCredentials:
    username: str
    password: str


@dataclass(frozen=True)
class CredentialRequest:
    username: str
    password: str
    artifact: str = ARTIFACT_TOKEN
    scopes: str = ""
    trust_mode: str = TRUST_STRICT
    use_proxy: bool = False

    @property
    def insecure(self) -> bool:
        return self.trust_mode == TRUST_INSECURE

    def __repr__(self) -> str:
        return (
            f"CredentialRequest(username={self.username!r}, password='***', "
            f"artifact={self.artifact!r}, scopes={self.scopes!r}, "
            f"trust_mode={self.trust_mode!r}, use_proxy={self.use_proxy!r})"
        )


def _require_non_empty(val: str | None, *, name: str, hint: str) -> str:
    out = (val or "").strip()
    if not out:
        raise ValidationFailed(f"missing {name} ({hint})")
    return out


def normalize_base_url(raw: str) -> str:
    """Return ``raw`` as an ``https://`` base URL without a trailing slash.

    A bare ``host[:port]`` is prefixed with ``https://``; any other scheme is
    rejected rather than rewritten.
    """
    value = (raw or "").strip()
    if "://" not in value:
        value = "https://" + value
    parsed = urlparse(value)
    if parsed.scheme != "https":
        raise ValidationFailed(f"kubi url must use https; got {raw!r}")
    if not parsed.hostname or any(c.isspace() for c in value):
        raise ValidationFailed(f"kubi url is not a valid request URL: {raw!r}")
    try:
        parsed.port
    except ValueError as e:
        raise ValidationFailed(f"kubi url has an invalid port: {raw!r}") from e
    if parsed.query or parsed.fragment:
        raise ValidationFailed(f"kubi url must not carry a query or fragment: {raw!r}")
    return value.rstrip("/")


def resolve_remote_endpoint(
    *,
    url: str | None,
    env_or_none: Callable[..., str | None],
    url_env_names: Sequence[str] = (KUBI_URL,),
) -> RemoteEndpoint:
    hint_env = str(url_env_names[0]).strip() if url_env_names else KUBI_URL
    raw = _require_non_empty(
        url or env_or_none(*url_env_names),
        name="kubi url",
        hint=f"--kubi-url https://<host>:<port> or env {hint_env}",
    )
    return RemoteEndpoint(base_url=normalize_base_url(raw))


def resolve_basic_credentials(
    *,
    username: str | None,
    password: str | None,
    env_or_none: Callable[..., str | None],
    prompt_password: Callable[[], str] | None = None,
    username_env_names: Sequence[str] = (KUBI_USERNAME,),
    password_env_names: Sequence[str] = (KUBI_PASSWORD,),
) -> BasicCredentials:
    username_hint_env = str(username_env_names[0]).strip() if username_env_names else KUBI_USERNAME
    password_hint_env = str(password_env_names[0]).strip() if password_env_names else KUBI_PASSWORD
    resolved_username = _require_non_empty(
        username or env_or_none(*username_env_names),
        name="username",
        hint=f"--username or env {username_hint_env}",
    )
    raw_password = password or env_or_none(*password_env_names)
    if not raw_password and prompt_password is not None:
        raw_password = prompt_password()
    # Passwords are taken verbatim; only emptiness is rejected.
    if not raw_password:
        raise ValidationFailed(f"missing password (--password, env {password_hint_env} or prompt)")
    return BasicCredentials(username=resolved_username, password=raw_password)


def build_credential_request(
    *,
    credentials: BasicCredentials,
    artifact: str,
    scopes: str | None = None,
    insecure: bool = False,
    use_proxy: bool = False,
) -> CredentialRequest:
    if artifact not in (ARTIFACT_TOKEN, ARTIFACT_CONFIG):
        raise ValidationFailed(f"unknown artifact {artifact!r} (expected token or config)")
    return CredentialRequest(
        username=credentials.username,
        password=credentials.password,
        artifact=artifact,
        scopes=(scopes or "").strip(),
        trust_mode=TRUST_INSECURE if insecure else TRUST_STRICT,
        use_proxy=bool(use_proxy),
    )
