from __future__ import annotations

import json
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class KubiError(Exception):
    pass


class UsageError(KubiError):
    pass


class OpError(KubiError):
    pass


class ValidationFailed(UsageError):
    """Required input is missing or malformed (username, server address, ...)."""


class TrustBootstrapFailed(OpError):
    """The server CA could not be fetched; credential exchange must not run."""


class ExchangeFailed(OpError):
    """Credential exchange returned a non-201 status or failed in transport."""

    def __init__(self, message: str, *, status: int | None = None, body: bytes = b"") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class MalformedToken(OpError):
    """Token is not three dot-separated segments or its claims do not decode."""


class ContextNotFound(OpError):
    """A named kubeconfig context (or the user it references) does not exist."""


class ConfigFileError(OpError):
    """Reading, parsing or writing the local kubeconfig failed."""


KUBI_URL = "KUBI_URL"
KUBI_USERNAME = "KUBI_USERNAME"
KUBI_PASSWORD = "KUBI_PASSWORD"
KUBI_SCOPES = "KUBI_SCOPES"
KUBI_INSECURE = "KUBI_INSECURE"
KUBI_USE_PROXY = "KUBI_USE_PROXY"
KUBI_HTTP_TIMEOUT = "KUBI_HTTP_TIMEOUT"
KUBECONFIG = "KUBECONFIG"

DEFAULT_HTTP_TIMEOUT_SECONDS = 30


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    pretty: bool
    quiet: bool
    kubeconfig_path: str = ""


def _truthy(raw: str | None) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _http_timeout_seconds() -> float:
    raw = _env_or_none(KUBI_HTTP_TIMEOUT)
    if raw is None:
        return float(DEFAULT_HTTP_TIMEOUT_SECONDS)
    try:
        val = float(raw)
    except ValueError as e:
        raise ValidationFailed(f"invalid {KUBI_HTTP_TIMEOUT}: {raw!r}") from e
    if val <= 0:
        raise ValidationFailed(f"invalid {KUBI_HTTP_TIMEOUT}: must be positive")
    return val


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _write_secure_text(*, path: Path, text: str) -> None:
    """Replace ``path`` with ``text``, readable and writable by the owner only.

    The content goes to a temp file in the target directory first and is then
    renamed over ``path``, so readers see either the old or the new file.
    A symlinked ``path`` is resolved first and its target is replaced, so the
    link survives. Only the innermost missing directory is created ``0700``;
    intermediate parents get the process umask.
    """
    target = Path(os.path.realpath(path))
    try:
        target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    except OSError as e:
        raise ConfigFileError(f"failed to prepare {path} for writing: {e}") from e
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, target)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise ConfigFileError(f"failed to write {path}: {e}") from e
