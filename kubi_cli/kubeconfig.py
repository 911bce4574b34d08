"""Reconcile kubi-issued credentials into the local kubeconfig.

Clusters, contexts and users are merged by name: an incoming entry replaces
the existing entry with the same name and everything else is left alone.
Fields this module does not know about are carried through untouched.
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml

from .cli_shared import KUBECONFIG, ConfigFileError, ContextNotFound, _write_secure_text

# (list key, per-entry payload key)
SECTIONS: tuple[tuple[str, str], ...] = (
    ("clusters", "cluster"),
    ("contexts", "context"),
    ("users", "user"),
)
_SECTION_KEYS = frozenset(section for section, _ in SECTIONS)

CREATED = "created"
MERGED = "merged"


def resolve_kubeconfig_path(override: str | None = None) -> Path:
    raw = (override or "").strip()
    if not raw:
        env_val = (os.environ.get(KUBECONFIG) or "").strip()
        if env_val:
            raw = next((p for p in env_val.split(os.pathsep) if p.strip()), "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".kube" / "config"


class LocalConfigBundle:
    """A kubeconfig document held as its parsed mapping."""

    def __init__(self, doc: dict[str, Any] | None = None) -> None:
        self.doc: dict[str, Any] = doc if doc is not None else {}
        for section, _payload in SECTIONS:
            val = self.doc.get(section)
            if val is not None and not isinstance(val, list):
                raise ConfigFileError(f"invalid kubeconfig: {section!r} must be a list")

    @classmethod
    def from_yaml(cls, text: str, *, label: str = "kubeconfig") -> "LocalConfigBundle":
        try:
            val = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigFileError(f"invalid {label}: {e}") from e
        if val is None:
            val = {}
        if not isinstance(val, dict):
            raise ConfigFileError(f"invalid {label}: expected a mapping at the top level")
        return cls(val)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.doc, default_flow_style=False, sort_keys=False)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LocalConfigBundle):
            return NotImplemented
        return self.doc == other.doc

    def __repr__(self) -> str:
        names = {section: list(self.entries(section)) for section, _ in SECTIONS}
        return f"LocalConfigBundle(current_context={self.current_context!r}, {names})"

    @property
    def current_context(self) -> str:
        return str(self.doc.get("current-context") or "")

    def entries(self, section: str) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for item in self.doc.get(section) or []:
            if not isinstance(item, dict) or not str(item.get("name") or "").strip():
                raise ConfigFileError(f"invalid kubeconfig: entry without a name in {section!r}")
            out[str(item["name"])] = item
        return out

    def _payload(self, section: str, payload_key: str, name: str) -> dict[str, Any] | None:
        entry = self.entries(section).get(name)
        if entry is None:
            return None
        body = entry.get(payload_key)
        return body if isinstance(body, dict) else {}

    def cluster(self, name: str) -> dict[str, Any] | None:
        return self._payload("clusters", "cluster", name)

    def context(self, name: str) -> dict[str, Any] | None:
        return self._payload("contexts", "context", name)

    def user(self, name: str) -> dict[str, Any] | None:
        return self._payload("users", "user", name)

    def dangling_references(self, context_names: list[str] | None = None) -> list[str]:
        contexts = self.entries("contexts")
        clusters = self.entries("clusters")
        users = self.entries("users")
        problems: list[str] = []
        for name in context_names if context_names is not None else list(contexts):
            ctx = self.context(name) or {}
            cluster_ref = str(ctx.get("cluster") or "")
            user_ref = str(ctx.get("user") or "")
            if cluster_ref not in clusters:
                problems.append(f"context {name!r} references unknown cluster {cluster_ref!r}")
            if user_ref not in users:
                problems.append(f"context {name!r} references unknown user {user_ref!r}")
        return problems

    def merged_with(self, incoming: "LocalConfigBundle") -> "LocalConfigBundle":
        doc = copy.deepcopy(self.doc)
        for key, val in incoming.doc.items():
            if key == "current-context" or key in _SECTION_KEYS:
                continue
            doc.setdefault(key, copy.deepcopy(val))
        for section, _payload in SECTIONS:
            self.entries(section)  # rejects nameless entries
            pending = incoming.entries(section)
            placed: set[str] = set()
            out: list[dict[str, Any]] = []
            # Existing order is kept; only names present in incoming are replaced.
            for item in self.doc.get(section) or []:
                name = str(item["name"])
                if name not in pending:
                    out.append(copy.deepcopy(item))
                elif name not in placed:
                    out.append(copy.deepcopy(pending[name]))
                    placed.add(name)
            out.extend(copy.deepcopy(e) for name, e in pending.items() if name not in placed)
            doc[section] = out
        return LocalConfigBundle(doc)


def _require_consistent(bundle: LocalConfigBundle, context_names: list[str], *, label: str) -> None:
    problems = bundle.dangling_references(context_names)
    if problems:
        raise ConfigFileError(f"invalid {label}: " + "; ".join(problems))


def read_bundle(path: Path) -> LocalConfigBundle | None:
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigFileError(f"failed to read {path}: {e}") from e
    return LocalConfigBundle.from_yaml(text, label=f"kubeconfig at {path}")


def write_bundle(path: Path, bundle: LocalConfigBundle) -> None:
    _write_secure_text(path=path, text=bundle.to_yaml())


def create(path: Path, bundle: LocalConfigBundle) -> LocalConfigBundle:
    _require_consistent(bundle, list(bundle.entries("contexts")), label="kubeconfig bundle")
    write_bundle(path, bundle)
    return bundle


def merge(path: Path, incoming: LocalConfigBundle) -> LocalConfigBundle:
    existing = read_bundle(path)
    if existing is None:
        raise ConfigFileError(f"no kubeconfig to merge into at {path}")
    merged = existing.merged_with(incoming)
    _require_consistent(merged, list(incoming.entries("contexts")), label="kubeconfig bundle")
    write_bundle(path, merged)
    return merged


def save_bundle(path: Path, incoming: LocalConfigBundle) -> str:
    """Create the kubeconfig when absent, merge into it otherwise."""
    if path.exists():
        merge(path, incoming)
        return MERGED
    create(path, incoming)
    return CREATED


def _resolve_user_name(bundle: LocalConfigBundle, context_name: str | None, *, path: Path | None = None) -> tuple[str, str]:
    name = (context_name or "").strip() or bundle.current_context
    where = f" in {path}" if path is not None else ""
    if not name:
        raise ContextNotFound(f"no context given and no current-context set{where}")
    ctx = bundle.context(name)
    if ctx is None:
        raise ContextNotFound(f"context {name!r} not found{where}")
    user_name = str(ctx.get("user") or "")
    if not user_name or bundle.user(user_name) is None:
        raise ContextNotFound(f"user {user_name!r} referenced by context {name!r} not found{where}")
    return name, user_name


def rotate_token(path: Path, context_name: str | None, new_token: str) -> LocalConfigBundle:
    """Overwrite the token of the user behind ``context_name``; nothing else changes."""
    bundle = read_bundle(path)
    if bundle is None:
        raise ContextNotFound(f"no kubeconfig at {path}; cannot rotate a token into it")
    _name, user_name = _resolve_user_name(bundle, context_name, path=path)
    entry = bundle.entries("users")[user_name]
    body = entry.get("user")
    if not isinstance(body, dict):
        body = {}
        entry["user"] = body
    body["token"] = new_token
    write_bundle(path, bundle)
    return bundle


def current_token(bundle: LocalConfigBundle, context_name: str | None = None) -> str:
    _name, user_name = _resolve_user_name(bundle, context_name)
    token = str((bundle.user(user_name) or {}).get("token") or "").strip()
    if not token:
        raise ContextNotFound(f"user {user_name!r} has no token")
    return token


def describe_context(bundle: LocalConfigBundle, context_name: str | None = None) -> dict[str, str]:
    name, user_name = _resolve_user_name(bundle, context_name)
    ctx = bundle.context(name) or {}
    cluster_name = str(ctx.get("cluster") or "")
    cluster = bundle.cluster(cluster_name) or {}
    return {
        "context": name,
        "user": user_name,
        "cluster": cluster_name,
        "server": str(cluster.get("server") or ""),
        "namespace": str(ctx.get("namespace") or ""),
    }
