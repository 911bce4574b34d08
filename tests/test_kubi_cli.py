from __future__ import annotations

import base64
import json
import re
from collections.abc import Iterable
from pathlib import Path

import click
import pytest
import typer.main
import yaml
from typer.testing import CliRunner

from kubi_cli import __version__
from kubi_cli.kubi_main import app, main


runner = CliRunner()

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

CA_PEM = b"-----BEGIN CERTIFICATE-----\nnot-a-real-cert\n-----END CERTIFICATE-----\n"


def _plain(s: str) -> str:
    return _ANSI_RE.sub("", s)


def _b64url(obj) -> str:
    raw = json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _jwt(claims) -> str:
    return f"{_b64url({'alg': 'RS256', 'typ': 'JWT'})}.{_b64url(claims)}.c2ln"


def _walk_click_commands(root: click.Command) -> Iterable[tuple[str, click.Command]]:
    stack: list[tuple[str, click.Command]] = [("", root)]
    while stack:
        base, cmd = stack.pop()
        if isinstance(cmd, click.Group):
            for name, sub in cmd.commands.items():
                path = f"{base} {name}".strip()
                yield path, sub
                stack.append((path, sub))


def _kubeconfig_doc(token: str = "old-token") -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {"name": "lab", "cluster": {"server": "https://api.lab.example:6443", "certificate-authority-data": "Q0E="}},
        ],
        "contexts": [
            {"name": "lab-alice", "context": {"cluster": "lab", "user": "alice-lab", "namespace": "team-a"}},
            {"name": "lab-bob", "context": {"cluster": "lab", "user": "bob-lab", "namespace": "team-b"}},
        ],
        "users": [
            {"name": "alice-lab", "user": {"token": token}},
            {"name": "bob-lab", "user": {"token": "bob-token"}},
        ],
        "current-context": "lab-alice",
    }


def _bundle_yaml() -> bytes:
    doc = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "prod", "cluster": {"server": "https://api.prod.example:6443"}}],
        "contexts": [{"name": "prod-alice", "context": {"cluster": "prod", "user": "alice-prod", "namespace": "team-a"}}],
        "users": [{"name": "alice-prod", "user": {"token": _jwt({"exp": 4102444800})}}],
        "current-context": "prod-alice",
    }
    return yaml.safe_dump(doc, sort_keys=False).encode("utf-8")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path: Path):
    for name in (
        "KUBECONFIG",
        "KUBI_URL",
        "KUBI_USERNAME",
        "KUBI_PASSWORD",
        "KUBI_SCOPES",
        "KUBI_INSECURE",
        "KUBI_USE_PROXY",
        "KUBI_HTTP_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


class _FakeServer:
    def __init__(self, *, status: int = 201, body: bytes = b""):
        self.status = status
        self.body = body
        self.calls: list[dict[str, object]] = []

    def ca(self, *, url, headers, transport):
        self.calls.append({"url": url, "headers": headers, "verify": transport.verify})
        return 200, {}, CA_PEM

    def exchange(self, *, url, headers, transport):
        self.calls.append({"url": url, "headers": headers, "verify": transport.verify})
        return self.status, {}, self.body


def _install(monkeypatch, server: _FakeServer) -> None:
    monkeypatch.setattr("kubi_cli.trust._http_get", server.ca)
    monkeypatch.setattr("kubi_cli.exchange._http_get", server.exchange)


def test_all_commands_have_help_text():
    for path, cmd in _walk_click_commands(typer.main.get_command(app)):
        if isinstance(cmd, click.Group):
            continue
        assert str(cmd.help or "").strip(), f"missing help text for command: {path}"


def test_version_flag_and_command():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.strip() == f"kubi {__version__}"

    result = runner.invoke(app, ["--plain-json", "version", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"kind": "kubi.version.v1", "version": __version__}


def test_explain_literal_token_prints_sections():
    token = _jwt({"exp": 4102444800, "user": "alice", "auths": [{"namespace": "team-a", "role": "admin"}]})

    result = runner.invoke(app, ["--quiet", "explain", token])

    assert result.exit_code == 0
    out = _plain(result.stdout)
    assert "User\n----\nalice\n" in out
    assert "Namespaces\n----------\nteam-a\n" in out
    assert "Expires\n-------\n2100-01-01T00:00:00+00:00\n" in out
    assert "Valid\n-----\nyes\n" in out
    assert "Signature not verified" in out


def test_explain_uses_current_context_token(tmp_path: Path):
    path = tmp_path / "config"
    token = _jwt({"exp": 1, "auths": [{"namespace": "team-a", "role": "admin"}]})
    path.write_text(yaml.safe_dump(_kubeconfig_doc(token)), encoding="utf-8")

    result = runner.invoke(app, ["--quiet", "--plain-json", "--kubeconfig", str(path), "explain", "--json"])

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["valid"] is False
    assert parsed["auths"] == [{"namespace": "team-a", "role": "admin"}]
    assert parsed["context"]["user"] == "alice-lab"
    assert parsed["context"]["server"] == "https://api.lab.example:6443"


def test_explain_reads_kubeconfig_env(monkeypatch, tmp_path: Path):
    path = tmp_path / "from-env"
    path.write_text(yaml.safe_dump(_kubeconfig_doc(_jwt({"exp": 4102444800}))), encoding="utf-8")
    monkeypatch.setenv("KUBECONFIG", str(path))

    result = runner.invoke(app, ["--quiet", "explain", "--context", "lab-alice"])

    assert result.exit_code == 0
    assert "https://api.lab.example:6443" in result.stdout


def test_explain_malformed_token_fails():
    result = runner.invoke(app, ["explain", "not-a-token"])
    assert result.exit_code == 1
    assert "3 dot-separated segments" in _plain(result.output)


def test_explain_without_token_or_kubeconfig_fails(tmp_path: Path):
    result = runner.invoke(app, ["--kubeconfig", str(tmp_path / "absent"), "explain"])
    assert result.exit_code == 1
    assert "no kubeconfig" in _plain(result.output)


def test_token_prints_token_and_sends_scopes(monkeypatch):
    token = _jwt({"exp": 4102444800})
    server = _FakeServer(body=(token + "\n").encode("ascii"))
    _install(monkeypatch, server)

    result = runner.invoke(
        app,
        [
            "--quiet",
            "token",
            "--kubi-url",
            "kubi.example.invalid:8443",
            "--username",
            "alice",
            "--password",
            "pw",
            "--scopes",
            "promote",
        ],
    )

    assert result.exit_code == 0
    assert result.stdout.strip() == token
    assert [c["url"] for c in server.calls] == [
        "https://kubi.example.invalid:8443/ca",
        "https://kubi.example.invalid:8443/token?scopes=promote",
    ]
    assert server.calls[0]["verify"] is False
    assert server.calls[1]["verify"] is True


def test_token_prompts_for_password(monkeypatch):
    server = _FakeServer(body=b"h.p.s")
    _install(monkeypatch, server)

    result = runner.invoke(
        app,
        ["--quiet", "token", "--kubi-url", "https://kubi.example.invalid", "--username", "alice"],
        input="typed-secret\n",
    )

    assert result.exit_code == 0
    expected = base64.b64encode(b"alice:typed-secret").decode("ascii")
    assert server.calls[1]["headers"] == {"authorization": f"Basic {expected}"}


def test_token_reads_inputs_from_env(monkeypatch):
    server = _FakeServer(body=b"h.p.s")
    _install(monkeypatch, server)
    monkeypatch.setenv("KUBI_URL", "kubi.example.invalid")
    monkeypatch.setenv("KUBI_USERNAME", "alice")
    monkeypatch.setenv("KUBI_PASSWORD", "pw")
    monkeypatch.setenv("KUBI_INSECURE", "true")

    result = runner.invoke(app, ["--quiet", "token"])

    assert result.exit_code == 0
    assert server.calls[1]["verify"] is False


def test_token_missing_username_is_usage_error(monkeypatch):
    server = _FakeServer(body=b"h.p.s")
    _install(monkeypatch, server)

    result = runner.invoke(app, ["token", "--kubi-url", "kubi.example.invalid", "--password", "pw"])

    assert result.exit_code == 2
    assert "missing username" in _plain(result.output)
    assert server.calls == []


def test_token_rejects_http_url(monkeypatch):
    server = _FakeServer(body=b"h.p.s")
    _install(monkeypatch, server)
    result = runner.invoke(
        app,
        ["token", "--kubi-url", "http://kubi.example.invalid", "--username", "a", "--password", "b"],
    )
    assert result.exit_code == 2
    assert server.calls == []


def test_token_update_config_rotates_current_context(monkeypatch, tmp_path: Path):
    path = tmp_path / "config"
    path.write_text(yaml.safe_dump(_kubeconfig_doc()), encoding="utf-8")
    path.chmod(0o600)
    token = _jwt({"exp": 4102444800})
    _install(monkeypatch, _FakeServer(body=token.encode("ascii")))

    result = runner.invoke(
        app,
        [
            "--quiet",
            "--kubeconfig",
            str(path),
            "token",
            "--kubi-url",
            "kubi.example.invalid",
            "--username",
            "alice",
            "--password",
            "pw",
            "--update-config",
        ],
    )

    assert result.exit_code == 0
    saved = yaml.safe_load(path.read_text(encoding="utf-8"))
    expected = _kubeconfig_doc(token)
    assert saved == expected
    assert (path.stat().st_mode & 0o777) == 0o600


def test_token_update_config_unknown_context_fails_without_write(monkeypatch, tmp_path: Path):
    path = tmp_path / "config"
    path.write_text(yaml.safe_dump(_kubeconfig_doc()), encoding="utf-8")
    before = path.read_text(encoding="utf-8")
    _install(monkeypatch, _FakeServer(body=_jwt({"exp": 1}).encode("ascii")))

    result = runner.invoke(
        app,
        [
            "--kubeconfig",
            str(path),
            "token",
            "--kubi-url",
            "kubi.example.invalid",
            "--username",
            "alice",
            "--password",
            "pw",
            "--update-config",
            "--context",
            "missing",
        ],
    )

    assert result.exit_code == 1
    assert "context 'missing' not found" in _plain(result.output)
    assert path.read_text(encoding="utf-8") == before


def test_token_update_config_refuses_non_jwt(monkeypatch, tmp_path: Path):
    path = tmp_path / "config"
    path.write_text(yaml.safe_dump(_kubeconfig_doc()), encoding="utf-8")
    before = path.read_text(encoding="utf-8")
    _install(monkeypatch, _FakeServer(body=b"<html>oops</html>"))

    result = runner.invoke(
        app,
        [
            "--kubeconfig",
            str(path),
            "token",
            "--kubi-url",
            "kubi.example.invalid",
            "--username",
            "alice",
            "--password",
            "pw",
            "--update-config",
        ],
    )

    assert result.exit_code == 1
    assert path.read_text(encoding="utf-8") == before


def test_config_401_fails_without_writing(monkeypatch, tmp_path: Path):
    path = tmp_path / "kube" / "config"
    _install(monkeypatch, _FakeServer(status=401, body=b"Unauthorized"))

    result = runner.invoke(
        app,
        [
            "--kubeconfig",
            str(path),
            "config",
            "--kubi-url",
            "kubi.example.invalid",
            "--username",
            "alice",
            "--password",
            "wrong",
        ],
    )

    assert result.exit_code == 1
    assert "error http 401" in _plain(result.output)
    assert not path.exists()
    assert not path.parent.exists()


def test_config_creates_kubeconfig_when_absent(monkeypatch, tmp_path: Path):
    path = tmp_path / "kube" / "config"
    server = _FakeServer(body=_bundle_yaml())
    _install(monkeypatch, server)

    result = runner.invoke(
        app,
        [
            "--quiet",
            "--plain-json",
            "--kubeconfig",
            str(path),
            "config",
            "--kubi-url",
            "kubi.example.invalid",
            "--username",
            "alice",
            "--password",
            "pw",
        ],
    )

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["action"] == "created"
    assert parsed["clusters"] == ["prod"]
    assert parsed["currentContext"] == "prod-alice"
    assert server.calls[1]["url"] == "https://kubi.example.invalid/config"
    saved = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert [c["name"] for c in saved["clusters"]] == ["prod"]
    assert (path.stat().st_mode & 0o777) == 0o600


def test_config_merges_into_existing_kubeconfig(monkeypatch, tmp_path: Path):
    path = tmp_path / "config"
    path.write_text(yaml.safe_dump(_kubeconfig_doc()), encoding="utf-8")
    _install(monkeypatch, _FakeServer(body=_bundle_yaml()))

    args = [
        "--quiet",
        "--plain-json",
        "--kubeconfig",
        str(path),
        "config",
        "--kubi-url",
        "kubi.example.invalid",
        "--username",
        "alice",
        "--password",
        "pw",
    ]
    result = runner.invoke(app, args)

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["action"] == "merged"
    assert parsed["currentContext"] == "lab-alice"
    saved = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert [c["name"] for c in saved["contexts"]] == ["lab-alice", "lab-bob", "prod-alice"]
    assert [c["name"] for c in saved["clusters"]] == ["lab", "prod"]

    first = path.read_text(encoding="utf-8")
    assert runner.invoke(app, args).exit_code == 0
    assert path.read_text(encoding="utf-8") == first


def test_config_print_does_not_write(monkeypatch, tmp_path: Path):
    path = tmp_path / "config"
    _install(monkeypatch, _FakeServer(body=_bundle_yaml()))

    result = runner.invoke(
        app,
        [
            "--quiet",
            "--kubeconfig",
            str(path),
            "config",
            "--kubi-url",
            "kubi.example.invalid",
            "--username",
            "alice",
            "--password",
            "pw",
            "--print",
        ],
    )

    assert result.exit_code == 0
    assert yaml.safe_load(result.stdout)["current-context"] == "prod-alice"
    assert not path.exists()


def test_config_rejects_non_yaml_bundle(monkeypatch, tmp_path: Path):
    path = tmp_path / "config"
    _install(monkeypatch, _FakeServer(body=b"- just\n- a list\n"))

    result = runner.invoke(
        app,
        [
            "--kubeconfig",
            str(path),
            "config",
            "--kubi-url",
            "kubi.example.invalid",
            "--username",
            "alice",
            "--password",
            "pw",
        ],
    )

    assert result.exit_code == 1
    assert "kubeconfig bundle from kubi server" in _plain(result.output)
    assert not path.exists()


def test_main_returns_exit_codes(capsys):
    assert main(["version"]) == 0
    assert capsys.readouterr().out.strip() == f"kubi {__version__}"
    assert main(["explain", "a.b"]) == 1
    assert main(["no-such-command"]) == 2


def test_explain_reports_non_utf8_kubeconfig(tmp_path: Path):
    path = tmp_path / "config"
    path.write_bytes(b"apiVersion: v1\ncurrent-context: \xff\xfe\n")

    result = runner.invoke(app, ["--kubeconfig", str(path), "explain"])
    assert result.exit_code == 1
    assert "failed to read" in _plain(result.output)

    assert main(["--kubeconfig", str(path), "explain"]) == 1
