from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Callable

from . import __version__
from . import auth_inputs
from . import kubeconfig
from .cli_shared import (
    KUBI_INSECURE,
    KUBI_SCOPES,
    KUBI_USE_PROXY,
    ContextNotFound,
    GlobalOpts,
    MalformedToken,
    _env_or_none,
    _eprint,
    _http_timeout_seconds,
    _print_json,
    _truthy,
)
from .exchange import acquire
from .token_inspect import TokenClaims, claims_report, inspect_token


def _notice(g: GlobalOpts, msg: str) -> None:
    if not g.quiet:
        _eprint(msg)


def _kubeconfig_path(g: GlobalOpts) -> Path:
    return kubeconfig.resolve_kubeconfig_path(g.kubeconfig_path or None)


def _credential_request(args: argparse.Namespace, *, artifact: str) -> tuple[auth_inputs.RemoteEndpoint, auth_inputs.CredentialRequest]:
    endpoint = auth_inputs.resolve_remote_endpoint(url=args.kubi_url, env_or_none=_env_or_none)
    prompt: Callable[[], str] | None = getattr(args, "prompt_password", None)
    creds = auth_inputs.resolve_basic_credentials(
        username=args.username,
        password=args.password,
        env_or_none=_env_or_none,
        prompt_password=prompt,
    )
    scopes = getattr(args, "scopes", None)
    if artifact == auth_inputs.ARTIFACT_TOKEN and not scopes:
        scopes = _env_or_none(KUBI_SCOPES)
    request = auth_inputs.build_credential_request(
        credentials=creds,
        artifact=artifact,
        scopes=scopes,
        insecure=bool(args.insecure) or _truthy(_env_or_none(KUBI_INSECURE)),
        use_proxy=bool(args.use_proxy) or _truthy(_env_or_none(KUBI_USE_PROXY)),
    )
    return endpoint, request


def _explain_lines(claims: TokenClaims, context: dict[str, str] | None) -> list[str]:
    user = claims.user or (context or {}).get("user", "")
    cluster = (context or {}).get("server", "")
    expires_at = claims.expires_at
    sections = [
        ("User", user),
        ("Cluster", cluster),
        ("Namespaces", "\n".join(claims.namespaces)),
        ("Expires", expires_at.isoformat() if expires_at else str(claims.exp)),
        ("Valid", "yes" if claims.valid else "no (expired)"),
        ("Admin", "yes" if claims.admin_access else "no"),
        ("Issuer", claims.issuer),
    ]
    lines: list[str] = []
    for title, body in sections:
        lines.extend([title, "-" * len(title), body, ""])
    lines.append("Signature not verified: validity only reflects the exp claim.")
    return lines


def cmd_explain(args: argparse.Namespace, g: GlobalOpts) -> int:
    token = (args.token or "").strip()
    context: dict[str, str] | None = None
    if not token:
        path = _kubeconfig_path(g)
        bundle = kubeconfig.read_bundle(path)
        if bundle is None:
            raise ContextNotFound(f"no token given and no kubeconfig at {path}")
        token = kubeconfig.current_token(bundle, args.context)
        context = kubeconfig.describe_context(bundle, args.context)

    claims = inspect_token(token)
    if args.json_output:
        payload: dict[str, Any] = claims_report(claims)
        if context is not None:
            payload["context"] = context
        _print_json(payload, pretty=g.pretty)
        return 0
    sys.stdout.write("\n".join(_explain_lines(claims, context)) + "\n")
    return 0


def cmd_token(args: argparse.Namespace, g: GlobalOpts) -> int:
    endpoint, request = _credential_request(args, artifact=auth_inputs.ARTIFACT_TOKEN)
    raw = acquire(endpoint, request, timeout_seconds=_http_timeout_seconds())
    token = raw.decode("utf-8", errors="replace").strip()
    if not token:
        raise MalformedToken("kubi server returned an empty token")

    if args.update_config:
        # Refuse to persist anything that does not even look like a JWT.
        inspect_token(token)
        path = _kubeconfig_path(g)
        kubeconfig.rotate_token(path, args.context, token)
        _notice(g, f"Token rotated into {path}")

    sys.stdout.write(token + "\n")
    return 0


def cmd_config(args: argparse.Namespace, g: GlobalOpts) -> int:
    endpoint, request = _credential_request(args, artifact=auth_inputs.ARTIFACT_CONFIG)
    raw = acquire(endpoint, request, timeout_seconds=_http_timeout_seconds())
    text = raw.decode("utf-8", errors="replace")
    incoming = kubeconfig.LocalConfigBundle.from_yaml(text, label="kubeconfig bundle from kubi server")

    if args.print_bundle:
        sys.stdout.write(text if text.endswith("\n") else text + "\n")
        _notice(g, "Use `kubi config` without --print to save it in your kubeconfig directly.")
        return 0

    path = _kubeconfig_path(g)
    action = kubeconfig.save_bundle(path, incoming)
    saved = kubeconfig.read_bundle(path) or incoming
    _notice(g, f"Great ! Your config has been {action} in {path}")
    _print_json(
        {
            "kind": "kubi.config.save.v1",
            "path": str(path),
            "action": action,
            "clusters": sorted(incoming.entries("clusters")),
            "contexts": sorted(incoming.entries("contexts")),
            "users": sorted(incoming.entries("users")),
            "currentContext": saved.current_context,
        },
        pretty=g.pretty,
    )
    return 0


def cmd_version(args: argparse.Namespace, g: GlobalOpts) -> int:
    if args.json_output:
        _print_json({"kind": "kubi.version.v1", "version": __version__}, pretty=g.pretty)
        return 0
    sys.stdout.write(f"kubi {__version__}\n")
    return 0
