from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

import click
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from . import __version__
from .cli_shared import (
    KUBECONFIG,
    KUBI_PASSWORD,
    KUBI_URL,
    KUBI_USERNAME,
    GlobalOpts,
    OpError,
    UsageError,
    _eprint,
)
from .kubi_commands import cmd_config, cmd_explain, cmd_token, cmd_version

_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {escape(msg)}", highlight=False, soft_wrap=True)


def _render_usage_error_with_help(*, message: str, ctx: click.Context | None = None) -> None:
    _rich_error(message)
    help_text = ""
    if isinstance(ctx, click.Context):
        try:
            help_text = str(ctx.get_help() or "").strip()
        except Exception:
            help_text = ""
    if help_text:
        _eprint("")
        _eprint(help_text)


def _bootstrap_env() -> None:
    # Use python-dotenv package defaults: discover and load .env without
    # overriding already-exported process environment values.
    load_dotenv()


def _configure_logging(*, quiet: bool) -> None:
    root = logging.getLogger("kubi_cli")
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(console=_ERROR_CONSOLE, show_time=False, show_path=False)
    root.addHandler(handler)
    root.setLevel(logging.ERROR if quiet else logging.WARNING)
    root.propagate = False


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"kubi {__version__}")
        raise typer.Exit(code=0)


def _prompt_password() -> str:
    return typer.prompt("Enter your LDAP password", hide_input=True, err=True)


app = typer.Typer(
    name="kubi",
    help="Fetch kubi tokens and kubeconfig bundles, and explain the tokens you hold.",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def app_callback(
    ctx: typer.Context,
    kubeconfig_path: str | None = typer.Option(
        None,
        "--kubeconfig",
        help=f"Path to the kubeconfig file (env override: {KUBECONFIG}; default: ~/.kube/config)",
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    _configure_logging(quiet=quiet)
    ctx.obj = {
        "g": GlobalOpts(
            pretty=not plain_json,
            quiet=quiet,
            kubeconfig_path=(kubeconfig_path or "").strip(),
        )
    }


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    if isinstance(ctx.obj, dict) and isinstance(ctx.obj.get("g"), GlobalOpts):
        return ctx.obj["g"]
    return GlobalOpts(pretty=True, quiet=False)


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(**kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


_KUBI_URL_HELP = f"Url to kubi server, ex: https://<kubi-ip>:<kubi-port> (env: {KUBI_URL})"
_USERNAME_HELP = f"LDAP username, not the dn (env: {KUBI_USERNAME})"
_PASSWORD_HELP = f"LDAP password; prompted when omitted (env: {KUBI_PASSWORD})"


@app.command("explain", help="Decode a token and print its user, namespaces and expiry (signature is not verified).")
def explain(
    ctx: typer.Context,
    token: str | None = typer.Argument(None, help="Token to explain (default: token of the current context)"),
    context: str | None = typer.Option(None, "--context", help="Kubeconfig context whose token to explain"),
    json_output: bool = typer.Option(False, "--json", help="Emit a JSON report"),
) -> None:
    _invoke(ctx, cmd_explain, token=token, context=context, json_output=json_output)


@app.command("token", help="Request a token from the kubi server and print it.")
def token(
    ctx: typer.Context,
    kubi_url: str | None = typer.Option(None, "--kubi-url", help=_KUBI_URL_HELP),
    username: str | None = typer.Option(None, "--username", help=_USERNAME_HELP),
    password: str | None = typer.Option(None, "--password", help=_PASSWORD_HELP),
    scopes: str | None = typer.Option(None, "--scopes", help="Scopes to request for the token"),
    insecure: bool = typer.Option(False, "--insecure", help="Skip TLS verification"),
    use_proxy: bool = typer.Option(False, "--use-proxy", help="Use the proxy from the environment"),
    update_config: bool = typer.Option(
        False,
        "--update-config",
        help="Write the token into the kubeconfig user of the current (or --context) context",
    ),
    context: str | None = typer.Option(None, "--context", help="Kubeconfig context to rotate"),
) -> None:
    _invoke(
        ctx,
        cmd_token,
        kubi_url=kubi_url,
        username=username,
        password=password,
        prompt_password=_prompt_password,
        scopes=scopes,
        insecure=insecure,
        use_proxy=use_proxy,
        update_config=update_config,
        context=context,
    )


@app.command("config", help="Request a kubeconfig bundle and create or merge it into the local kubeconfig.")
def config(
    ctx: typer.Context,
    kubi_url: str | None = typer.Option(None, "--kubi-url", help=_KUBI_URL_HELP),
    username: str | None = typer.Option(None, "--username", help=_USERNAME_HELP),
    password: str | None = typer.Option(None, "--password", help=_PASSWORD_HELP),
    insecure: bool = typer.Option(False, "--insecure", help="Skip TLS verification"),
    use_proxy: bool = typer.Option(False, "--use-proxy", help="Use the proxy from the environment"),
    print_bundle: bool = typer.Option(False, "--print", help="Print the bundle instead of saving it"),
) -> None:
    _invoke(
        ctx,
        cmd_config,
        kubi_url=kubi_url,
        username=username,
        password=password,
        prompt_password=_prompt_password,
        insecure=insecure,
        use_proxy=use_proxy,
        print_bundle=print_bundle,
    )


@app.command("version", help="Print the kubi client version.")
def version_cmd(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit a JSON report"),
) -> None:
    _invoke(ctx, cmd_version, json_output=json_output)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        _bootstrap_env()
        result = app(args=argv, prog_name="kubi", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.exceptions.Abort:
        _rich_error("aborted")
        return 1
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _rich_error(str(e))
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
