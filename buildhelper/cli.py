"""CLI entrypoint for Build Helper."""

from __future__ import annotations

import asyncio
import json
import logging
import webbrowser
from pathlib import Path
from typing import Any, Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from buildhelper import __version__
from buildhelper.config import load_config, resolve_server_config, write_default_config
from buildhelper.errors import RelayError, SettingsError
from buildhelper.models import ConsoleSettings, ExecutableReference, TriggerRequest
from buildhelper.poller import RelayFetcher, follow_build, follow_logs
from buildhelper.preflight import run_doctor_checks, strict_failures
from buildhelper.relay import BuildServerRelay
from buildhelper.settings import (
    add_parameter,
    default_settings_path,
    load_settings,
    missing_fields,
    parse_assignments,
    remove_parameter,
    resolve_trigger_values,
    save_settings,
    update_settings,
)

app = typer.Typer(
    name="buildhelper",
    help=(
        "Build Helper - trigger parameterized Jenkins jobs and follow their logs.\n\n"
        "Examples:\n"
        "  buildhelper settings set --username me --api-token <token>\n"
        "  buildhelper trigger -p CLIENT_NAME=acme --follow\n"
        "  buildhelper logs 42 --follow\n"
        "  buildhelper serve --port 3000"
    ),
    add_completion=False,
)
settings_app = typer.Typer(help="Show and edit saved console settings.", add_completion=False)
app.add_typer(settings_app, name="settings")
console = Console()

_SETTINGS_OPTION = typer.Option(None, "--settings", help="Settings file (default: ~/.buildhelper/settings.yaml)")
_CONFIG_OPTION = typer.Option(None, "--config", help="Relay config YAML (logs target, timeouts, polling)")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    _configure_logging(verbose)


def _print_banner() -> None:
    heading = Text()
    heading.append("Build Helper", style="bold cyan")
    heading.append("  |  Jenkins trigger & log relay", style="bold white")
    subtitle = Text(f"v{__version__}", style="dim")
    console.print(
        Panel(
            Text.assemble(heading, "\n", subtitle),
            border_style="cyan",
            box=box.ROUNDED,
            padding=(0, 1),
        )
    )


def _load_settings_or_exit(path: Optional[Path]) -> tuple[Path, ConsoleSettings]:
    resolved = path or default_settings_path()
    try:
        return resolved, load_settings(resolved)
    except SettingsError as exc:
        console.print(f"[red]Settings error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _require_credentials(settings: ConsoleSettings) -> None:
    missing = missing_fields(settings)
    if missing:
        console.print(f"[red]Missing settings:[/red] {', '.join(missing)}")
        console.print("Set them with: buildhelper settings set --help")
        raise typer.Exit(code=1)


def _load_config_or_exit(path: Optional[Path]) -> dict[str, Any]:
    try:
        return load_config(path)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


class _LogPrinter:
    """Prints only the part of a full-log snapshot that was not shown yet."""

    def __init__(self) -> None:
        self._shown = 0

    def __call__(self, text: str) -> None:
        if len(text) < self._shown:
            self._shown = 0
        chunk = text[self._shown:]
        if chunk:
            console.print(chunk, end="", markup=False, highlight=False)
            self._shown = len(text)


def _announce_started(reference: ExecutableReference) -> None:
    console.print(f"[green]Job Started:[/green] #{reference.build_number} {reference.build_url}")


def _run_follow(coro: Any) -> None:
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped following.[/yellow]")


@app.command("init-config")
def init_config_command(
    path: Path = typer.Argument(Path("buildhelper.yaml"), help="Where to write the relay config"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write a default relay config YAML for serve --config."""
    if path.exists() and not force:
        console.print(f"[red]Config exists:[/red] {path} (use --force to overwrite)")
        raise typer.Exit(code=1)
    write_default_config(path)
    console.print(f"[green]Config created:[/green] {path}")


@app.command("serve")
def serve_command(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host (default from config: 127.0.0.1)"),
    port: Optional[int] = typer.Option(None, "--port", envvar="PORT", help="Bind port (default from config: 3000)"),
    config_path: Optional[Path] = _CONFIG_OPTION,
    no_open: bool = typer.Option(True, "--no-open/--open", help="Open the console in a browser"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print server command and exit"),
) -> None:
    """Run the web console and relay API."""
    _print_banner()
    config = _load_config_or_exit(config_path)
    try:
        config = resolve_server_config(config, host=host, port=port)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    server = config["server"]
    url = f"http://{server['host']}:{server['port']}"
    console.print(f"[green]Server is running on:[/green] {url}")
    if dry_run:
        console.print(f"[cyan][dry-run][/cyan] uvicorn buildhelper.web:create_app --host {server['host']} --port {server['port']}")
        return

    import uvicorn

    from buildhelper.web import create_app

    if not no_open:
        webbrowser.open(url)
    uvicorn.run(create_app(config), host=server["host"], port=int(server["port"]), log_level="info")


@app.command("trigger")
def trigger_command(
    param: Optional[list[str]] = typer.Option(None, "--param", "-p", help="Parameter value as KEY=VALUE (repeatable)"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Wait for the build to start and stream its log"),
    settings_path: Optional[Path] = _SETTINGS_OPTION,
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Trigger the configured job with parameter values."""
    _print_banner()
    _, settings = _load_settings_or_exit(settings_path)
    _require_credentials(settings)
    config = _load_config_or_exit(config_path)
    relay = BuildServerRelay.from_config(config)

    try:
        values = resolve_trigger_values(settings.parameters, parse_assignments(param or []))
        queue_url = relay.trigger_build(
            TriggerRequest(
                parameters=values,
                server_host=settings.server_host,
                job_name=settings.job_name,
                username=settings.username,
                api_token=settings.api_token,
            )
        )
    except RelayError as exc:
        console.print(f"[red]Trigger failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    console.print(f"[green]Job Queued:[/green] {queue_url}")
    if not follow:
        return

    polling = config.get("polling", {})
    console.print("[cyan]Fetching job details...[/cyan] (Ctrl+C to stop)")
    _run_follow(
        follow_build(
            RelayFetcher(relay, settings.username, settings.api_token),
            queue_url,
            queue_interval=float(polling.get("queue_interval_seconds", 3)),
            log_interval=float(polling.get("log_interval_seconds", 5)),
            on_started=_announce_started,
            on_log=_LogPrinter(),
        )
    )


@app.command("queue")
def queue_command(
    queue_url: str = typer.Argument(..., help="Queue item URL returned by trigger"),
    settings_path: Optional[Path] = _SETTINGS_OPTION,
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Print the queue item JSON for a triggered build."""
    _, settings = _load_settings_or_exit(settings_path)
    _require_credentials(settings)
    relay = BuildServerRelay.from_config(_load_config_or_exit(config_path))
    try:
        status = relay.fetch_queue_status(queue_url, settings.username, settings.api_token)
    except RelayError as exc:
        console.print(f"[red]Queue fetch failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print_json(json.dumps(status))


@app.command("logs")
def logs_command(
    build_id: str = typer.Argument(..., help="Build number"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep polling the log"),
    settings_path: Optional[Path] = _SETTINGS_OPTION,
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Print the log of a build of the configured log job."""
    _, settings = _load_settings_or_exit(settings_path)
    _require_credentials(settings)
    config = _load_config_or_exit(config_path)
    relay = BuildServerRelay.from_config(config)

    if follow:
        _run_follow(
            follow_logs(
                RelayFetcher(relay, settings.username, settings.api_token),
                build_id,
                log_interval=float(config.get("polling", {}).get("log_interval_seconds", 5)),
                on_log=_LogPrinter(),
            )
        )
        return

    try:
        text = relay.fetch_build_log(build_id, settings.username, settings.api_token)
    except RelayError as exc:
        console.print(f"[red]Log fetch failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(text, end="", markup=False, highlight=False)


@app.command("doctor")
def doctor_command(
    strict: bool = typer.Option(False, "--strict", help="Return non-zero exit code when required checks fail."),
    offline: bool = typer.Option(False, "--offline", help="Skip the build server reachability check."),
    settings_path: Optional[Path] = _SETTINGS_OPTION,
) -> None:
    """Check settings and build server access."""
    _print_banner()
    checks = run_doctor_checks(settings_path or default_settings_path(), check_server=not offline)

    table = Table(title="Build Helper Doctor")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details")
    table.add_column("How To Fix")
    for item in checks:
        status = "[green]PASS[/green]" if item.ok else "[red]FAIL[/red]"
        table.add_row(item.name, status, item.details, "-" if item.ok else item.fix)
    console.print(table)

    failures = strict_failures(checks)
    if failures == 0:
        console.print("[green]Doctor status:[/green] all required checks passed")
    else:
        console.print(f"[red]Doctor status:[/red] {failures} required check(s) failed")
    if strict and failures > 0:
        raise typer.Exit(code=1)


@settings_app.command("show")
def settings_show(
    settings_path: Optional[Path] = _SETTINGS_OPTION,
    reveal: bool = typer.Option(False, "--reveal", help="Show the API token in clear text"),
) -> None:
    """Show saved settings."""
    path, settings = _load_settings_or_exit(settings_path)
    table = Table(title=f"Settings ({path})")
    table.add_column("Setting")
    table.add_column("Value")
    token = settings.api_token if reveal else ("*" * 8 if settings.api_token else "")
    table.add_row("serverHost", settings.server_host)
    table.add_row("jobName", settings.job_name)
    table.add_row("username", settings.username)
    table.add_row("apiToken", token)
    console.print(table)

    params = Table(title="Parameters")
    params.add_column("Key")
    params.add_column("Default")
    params.add_column("Required")
    for item in settings.parameters:
        params.add_row(item.key, item.default_value, "yes" if item.required else "no")
    console.print(params)


@settings_app.command("set")
def settings_set(
    server_host: Optional[str] = typer.Option(None, "--server-host", help="Jenkins host, e.g. ci.example.com"),
    job_name: Optional[str] = typer.Option(None, "--job-name", help="Job to trigger"),
    username: Optional[str] = typer.Option(None, "--username", help="Jenkins username"),
    api_token: Optional[str] = typer.Option(None, "--api-token", help="Jenkins API token or password"),
    settings_path: Optional[Path] = _SETTINGS_OPTION,
) -> None:
    """Update credentials or the target job."""
    path, settings = _load_settings_or_exit(settings_path)
    update_settings(settings, server_host=server_host, job_name=job_name, username=username, api_token=api_token)
    save_settings(settings, path)
    console.print(f"[green]Settings Saved:[/green] {path}")


@settings_app.command("add-param")
def settings_add_param(
    key: str = typer.Argument(..., help="Parameter key"),
    default: str = typer.Option("", "--default", help="Default value; empty makes the parameter required"),
    settings_path: Optional[Path] = _SETTINGS_OPTION,
) -> None:
    """Add or update a parameter definition."""
    path, settings = _load_settings_or_exit(settings_path)
    try:
        definition = add_parameter(settings, key, default)
    except RelayError as exc:
        raise typer.BadParameter(str(exc)) from exc
    save_settings(settings, path)
    console.print(f"[green]Parameter saved:[/green] {definition.key}")


@settings_app.command("remove-param")
def settings_remove_param(
    key: str = typer.Argument(..., help="Parameter key"),
    settings_path: Optional[Path] = _SETTINGS_OPTION,
) -> None:
    """Remove a parameter definition."""
    path, settings = _load_settings_or_exit(settings_path)
    if not remove_parameter(settings, key):
        console.print(f"[red]No parameter named:[/red] {key}")
        raise typer.Exit(code=1)
    save_settings(settings, path)
    console.print(f"[green]Parameter removed:[/green] {key}")


if __name__ == "__main__":
    app()
