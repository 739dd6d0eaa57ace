"""WipeBridge command-line interface.

``wipebridge run`` is the main entry: it validates the target phone,
sizes the job, asks for confirmation and runs the overwrite with a live
progress bar.  Ctrl-C requests a cooperative stop: the current write
increment finishes, the pass is synced and deleted, and the temporary
directory is removed before the command exits.
"""

from __future__ import annotations

import logging
import queue
import sys
import threading
from pathlib import Path

import click
import paramiko
from keyring.errors import KeyringError
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from wipebridge import __version__
from wipebridge.audit import AuditLog
from wipebridge.bridge import AdbBridge
from wipebridge.config import ConfigManager
from wipebridge.device import DeviceSession
from wipebridge.engine import OverwriteEngine, SessionState, WipeConfig, WipeResult
from wipebridge.errors import BridgeUnavailable, ExitCode, WipeError
from wipebridge.progress import Phase, ProgressEvent
from wipebridge.storage import StorageProbe
from wipebridge.transport import SSHTransport, UnknownHostError, accept_host_key
from wipebridge.utils.path_helpers import human_readable_size
from wipebridge.watcher import DeviceWatcher

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

SECURITY_NOTE = """\
WipeBridge overwrites the FREE space of an Android phone's user storage
with random data so that previously deleted files cannot be recovered.

It does not delete your current files and it is not a factory reset.
For a phone you are selling or giving away: factory reset it first, set
it up again without an account, then run WipeBridge, then factory reset
once more.

On flash storage, wear levelling means some old blocks may survive any
software overwrite.  Keep the phone charged and connected for the whole
run."""


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _fail(exc: WipeError) -> None:
    err_console.print(f"[red]✗ {exc}[/red]")
    sys.exit(int(exc.exit_code))


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------


def _settings(ctx: click.Context) -> ConfigManager:
    return ctx.obj["settings"]


def _connect_host(ctx: click.Context, name: str) -> SSHTransport:
    settings = _settings(ctx)
    profile = settings.get_host(name)
    if profile is None:
        _fail(BridgeUnavailable(f"No saved bridge host named {name!r}; see 'wipebridge hosts list'"))

    transport = SSHTransport(
        host=profile["host"],
        port=int(profile.get("port", 22)),
        username=profile.get("username", "root"),
        auth_type=profile.get("auth_type", "key"),
        key_path=profile.get("key_path"),
        timeout=settings.get_number("ssh_timeout"),
    )
    try:
        try:
            transport.connect()
        except UnknownHostError as exc:
            if exc.key is None:
                raise
            err_console.print(f"[yellow]{exc}[/yellow]")
            if not click.confirm("Trust this host and continue?", default=False):
                sys.exit(int(ExitCode.BRIDGE_UNAVAILABLE))
            accept_host_key(exc.hostname, exc.key)
            transport.connect()
    except (UnknownHostError, paramiko.SSHException, OSError) as exc:
        _fail(BridgeUnavailable(f"Could not connect to bridge host {name!r}: {exc}"))

    ctx.call_on_close(transport.disconnect)
    return transport


def get_bridge(ctx: click.Context) -> AdbBridge:
    """Get or create the adb bridge for this invocation."""
    if "bridge" not in ctx.obj:
        settings = _settings(ctx)
        host = ctx.obj.get("host")
        transport = _connect_host(ctx, host) if host else None
        ctx.obj["bridge"] = AdbBridge(
            transport,
            adb_path=settings.get("adb_path", "adb"),
            command_timeout=settings.get_number("command_timeout"),
        )
    return ctx.obj["bridge"]


def get_devices(ctx: click.Context) -> DeviceSession:
    if "devices" not in ctx.obj:
        ctx.obj["devices"] = DeviceSession(get_bridge(ctx))
    return ctx.obj["devices"]


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="WipeBridge")
@click.option("--host", "host", default=None, help="Run adb on a saved SSH bridge host")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Settings directory (default ~/.wipebridge)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
@click.pass_context
def cli(ctx: click.Context, host: str | None, config_dir: Path | None, verbose: bool) -> None:
    """
    WipeBridge - overwrite the free space of an Android phone over adb.
    """
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = ConfigManager(base_dir=config_dir)
    ctx.obj["host"] = host


# ---------------------------------------------------------------------------
# Inspection commands
# ---------------------------------------------------------------------------


@cli.command("status")
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show whether adb is available and how many phones are ready."""
    try:
        info = get_bridge(ctx).status()
    except WipeError as exc:
        _fail(exc)

    if not info.installed:
        err_console.print("[red]✗ adb is not installed or not in PATH[/red]")
        sys.exit(int(ExitCode.BRIDGE_UNAVAILABLE))
    console.print(f"[green]✓[/green] {info.version}")
    console.print(f"Devices ready: {info.devices_connected}")


@cli.command("devices")
@click.pass_context
def list_devices(ctx: click.Context) -> None:
    """List attached phones and their adb state."""
    try:
        devices = get_bridge(ctx).list_devices()
    except WipeError as exc:
        _fail(exc)

    if not devices:
        console.print("[yellow]No devices attached[/yellow]")
        return

    table = Table(title="Attached Devices")
    table.add_column("Serial", style="cyan")
    table.add_column("State", style="yellow")
    table.add_column("Model", style="white")
    table.add_column("Product", style="dim")
    for device in devices:
        state = device.state if device.is_ready else f"[red]{device.state}[/red]"
        table.add_row(device.serial, state, device.model or "", device.product or "")
    console.print(table)


@cli.command("space")
@click.option("--device", "-d", "device", default=None, help="Device serial")
@click.pass_context
def space(ctx: click.Context, device: str | None) -> None:
    """Show storage usage of the phone's user-data partition."""
    settings = _settings(ctx)
    try:
        handle = get_devices(ctx).validate(device)
        probe = StorageProbe(get_bridge(ctx), settings.get("wipe_root", "/sdcard"))
        snapshot = probe.snapshot(handle)
    except WipeError as exc:
        _fail(exc)

    console.print(Panel(
        f"[cyan]Device:[/cyan] {handle.serial}\n"
        f"[cyan]Total:[/cyan] {human_readable_size(snapshot.total_bytes)}\n"
        f"[cyan]Used:[/cyan] {human_readable_size(snapshot.used_bytes)} ({snapshot.percent_used}%)\n"
        f"[cyan]Free:[/cyan] {human_readable_size(snapshot.available_bytes)}",
        title=f"Storage at {probe.mount}",
    ))


# ---------------------------------------------------------------------------
# Wipe
# ---------------------------------------------------------------------------


def _show_security_note(settings: ConfigManager, assume_yes: bool) -> None:
    if settings.is_disclaimer_acknowledged():
        return
    console.print(Panel(SECURITY_NOTE, title="Before you start", border_style="yellow"))
    if not assume_yes and not click.confirm("I have read this note", default=False):
        sys.exit(int(ExitCode.ABORTED))
    settings.acknowledge_disclaimer()


def _describe_event(event: ProgressEvent) -> str:
    labels = {
        Phase.WRITING: "Writing",
        Phase.SYNCING: "Syncing",
        Phase.DELETING: "Deleting",
        Phase.PASS_COMPLETE: "Pass done",
        Phase.WIPE_COMPLETE: "Complete",
        Phase.ABORTED: "Aborted",
    }
    return f"Pass {event.pass_number}/{event.total_passes} {labels[event.phase]}"


def _print_result(result: WipeResult) -> None:
    if result.succeeded:
        console.print(f"[green]✓ {result.summary()}[/green]")
    elif result.state is SessionState.ABORTED:
        console.print(f"[yellow]■ {result.summary()}[/yellow]")
    else:
        err_console.print(f"[red]✗ {result.summary()}[/red]")
    if result.cleanup_warning and result.plan is not None:
        err_console.print(
            f"[yellow]{result.plan.remote_dir} is still on the phone; run "
            f"'wipebridge cleanup --device {result.plan.device.serial}' once it is "
            "reachable again to reclaim the space.[/yellow]"
        )


@cli.command("run")
@click.option("--device", "-d", "device", default=None, help="Device serial")
@click.option(
    "--mode",
    type=click.Choice(["quick", "full"]),
    default="quick",
    show_default=True,
    help="quick: fixed size per pass; full: fill a percentage of free space",
)
@click.option("--passes", "-p", type=int, default=None, help="Number of passes (1-20)")
@click.option("--size", "size_mb", type=int, default=None, help="Quick mode: MB per pass (64-10240)")
@click.option("--fill-percent", type=int, default=None, help="Full mode: percent of free space (1-99)")
@click.option("--dry-run", is_flag=True, help="Validate and size the job without writing")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def run(
    ctx: click.Context,
    device: str | None,
    mode: str,
    passes: int | None,
    size_mb: int | None,
    fill_percent: int | None,
    dry_run: bool,
    assume_yes: bool,
) -> None:
    """Overwrite the phone's free space with random data."""
    settings = _settings(ctx)

    try:
        config = WipeConfig.build(
            mode,
            passes if passes is not None else int(settings.get_number("passes")),
            chunk_size_mb=size_mb if size_mb is not None else int(settings.get_number("chunk_size_mb")),
            fill_percent=fill_percent if fill_percent is not None else int(settings.get_number("fill_percent")),
        )
    except WipeError as exc:
        _fail(exc)

    _show_security_note(settings, assume_yes)

    events: queue.Queue[ProgressEvent] = queue.Queue()
    try:
        engine = OverwriteEngine(
            get_bridge(ctx),
            devices=get_devices(ctx),
            settings=settings,
            audit=AuditLog.for_today(settings.log_dir),
        )
        session = engine.create_session(device, config, on_event=events.put)
        with console.status("Checking device and storage..."):
            plan = session.plan()
    except WipeError as exc:
        _fail(exc)

    try:
        info = get_devices(ctx).describe(plan.device)
    except WipeError as exc:
        logger.warning("Could not read device properties: %s", exc)
        info = {}
    console.print(Panel(
        f"[cyan]Device:[/cyan] {plan.device.serial} "
        f"({info.get('brand', '')} {info.get('model', '')}, Android {info.get('android_version', '?')})\n"
        f"[cyan]Storage:[/cyan] {plan.snapshot}\n"
        f"[cyan]Mode:[/cyan] {config.mode.value}, {config.passes} pass(es) x "
        f"{human_readable_size(plan.pass_plan.target_bytes)}\n"
        f"[cyan]Total to write:[/cyan] {human_readable_size(plan.total_bytes)}\n"
        f"[cyan]Estimated time:[/cyan] ~{plan.estimated_seconds / 60:.0f} min",
        title="Dry run" if dry_run else "Wipe plan",
    ))

    if dry_run:
        result = session.run(dry_run=True)
        _print_result(result)
        sys.exit(int(result.exit_code))

    if not assume_yes and not click.confirm(
        f"Overwrite the free space on {plan.device.serial}?", default=False
    ):
        console.print("Nothing written.")
        sys.exit(int(ExitCode.ABORTED))

    outcome: list[WipeResult] = []

    def _work() -> None:
        try:
            outcome.append(session.run())
        except Exception:
            logger.exception("Wipe worker stopped without a result")

    worker = threading.Thread(target=_work, name="wipe-worker", daemon=True)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Starting...", total=1.0)
        worker.start()
        while worker.is_alive() or not events.empty():
            try:
                event = events.get(timeout=0.2)
                progress.update(
                    task, completed=event.overall_fraction, description=_describe_event(event)
                )
            except queue.Empty:
                continue
            except KeyboardInterrupt:
                if not session.cancelled:
                    session.cancel()
                    progress.console.print(
                        "[yellow]Stopping: finishing the current write and cleaning up...[/yellow]"
                    )
        worker.join()

    if not outcome:
        err_console.print(
            f"[red]✗ Wipe stopped unexpectedly on {plan.device.serial}; see the audit log in "
            f"{settings.log_dir}. Run 'wipebridge cleanup --device {plan.device.serial}' "
            "to remove leftover files.[/red]"
        )
        sys.exit(int(ExitCode.ERROR))
    result = outcome[0]
    _print_result(result)
    sys.exit(int(result.exit_code))


# ---------------------------------------------------------------------------
# After the wipe
# ---------------------------------------------------------------------------


@cli.command("reset-settings")
@click.option("--device", "-d", "device", default=None, help="Device serial")
@click.pass_context
def reset_settings(ctx: click.Context, device: str | None) -> None:
    """Open the phone's factory-reset screen."""
    try:
        handle = get_devices(ctx).validate(device)
        screen = get_bridge(ctx).open_reset_settings(handle.serial)
    except WipeError as exc:
        _fail(exc)
    console.print(f"[green]✓ Opened {screen} on {handle.serial}[/green]")
    console.print("Confirm the reset on the phone itself.")


@cli.command("revoke-adb")
@click.option("--device", "-d", "device", default=None, help="Device serial")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def revoke_adb(ctx: click.Context, device: str | None, assume_yes: bool) -> None:
    """Turn off USB debugging on the phone."""
    try:
        handle = get_devices(ctx).validate(device)
    except WipeError as exc:
        _fail(exc)

    if not assume_yes and not click.confirm(
        f"Disable USB debugging on {handle.serial}? WipeBridge will lose access to it.",
        default=False,
    ):
        console.print("Nothing changed.")
        sys.exit(int(ExitCode.ABORTED))

    try:
        confirmed = get_bridge(ctx).revoke_debugging(handle.serial)
    except WipeError as exc:
        err_console.print(
            "[red]✗ Could not disable USB debugging; the device may require root access.[/red]"
        )
        _fail(exc)
    if confirmed:
        console.print(f"[green]✓ USB debugging disabled on {handle.serial}[/green]")
    else:
        console.print(
            f"[yellow]{handle.serial} disconnected while debugging was being disabled; "
            "check Developer options on the phone.[/yellow]"
        )
    console.print("Re-enable it in Developer options to use WipeBridge again.")


@cli.command("cleanup")
@click.option("--device", "-d", "device", default=None, help="Device serial")
@click.pass_context
def cleanup(ctx: click.Context, device: str | None) -> None:
    """Remove wipe files left on the phone by an interrupted run."""
    settings = _settings(ctx)
    devices = get_devices(ctx)
    try:
        handle = devices.validate(device)
        with devices.lease(handle), console.status(f"Cleaning up {handle.serial}..."):
            removed = get_bridge(ctx).remove_stale_sessions(
                handle.serial,
                settings.get("wipe_root", "/sdcard"),
                timeout=settings.get_number("idle_timeout"),
            )
    except WipeError as exc:
        err_console.print("[yellow]Cleanup attempted; some files may remain.[/yellow]")
        _fail(exc)

    if not removed:
        console.print(f"[green]✓ Nothing to clean up on {handle.serial}[/green]")
        return
    for path in removed:
        console.print(f"  removed {path}")
    console.print(f"[green]✓ Removed {len(removed)} leftover director(ies)[/green]")


@cli.command("wait")
@click.option("--device", "-d", "device", required=True, help="Device serial")
@click.option("--timeout", type=float, default=None, help="Give up after this many seconds")
@click.pass_context
def wait(ctx: click.Context, device: str, timeout: float | None) -> None:
    """Wait until a phone is attached and authorized."""
    messages: list[str] = []
    watcher = DeviceWatcher(get_bridge(ctx), on_error=messages.append)
    with console.status(f"Waiting for {device}..."):
        handle = watcher.wait_for(device, timeout=timeout)
    if handle is None:
        detail = f" (last error: {messages[-1]})" if messages else ""
        err_console.print(f"[red]✗ {device} did not appear{detail}[/red]")
        sys.exit(int(ExitCode.NO_DEVICE))
    console.print(f"[green]✓ {handle.serial} is ready[/green]")


# ---------------------------------------------------------------------------
# Bridge hosts
# ---------------------------------------------------------------------------


@cli.group("hosts")
def hosts() -> None:
    """Manage saved SSH bridge hosts."""


@hosts.command("add")
@click.argument("name")
@click.option("--address", required=True, help="Hostname or IP of the bridge host")
@click.option("--port", type=int, default=22, show_default=True)
@click.option("--user", "username", default="root", show_default=True)
@click.option("--auth", "auth_type", type=click.Choice(["key", "password"]), default="key", show_default=True)
@click.option("--key-path", default=None, help="Private key file (key auth)")
@click.pass_context
def hosts_add(
    ctx: click.Context,
    name: str,
    address: str,
    port: int,
    username: str,
    auth_type: str,
    key_path: str | None,
) -> None:
    """Save a bridge host profile."""
    profile = {
        "name": name,
        "host": address,
        "port": port,
        "username": username,
        "auth_type": auth_type,
        "key_path": key_path,
    }
    if auth_type == "password":
        password = click.prompt("Password", hide_input=True)
        try:
            SSHTransport(address, port, username).store_password(password)
        except KeyringError as exc:
            err_console.print(f"[red]✗ Could not store password in keyring: {exc}[/red]")
            sys.exit(int(ExitCode.ERROR))
    _settings(ctx).save_host(profile)
    console.print(f"[green]✓ Saved {name} ({username}@{address}:{port})[/green]")


@hosts.command("list")
@click.pass_context
def hosts_list(ctx: click.Context) -> None:
    """List saved bridge hosts."""
    profiles = _settings(ctx).get_hosts()
    if not profiles:
        console.print("No bridge hosts saved")
        return
    table = Table(title="Bridge Hosts")
    table.add_column("Name", style="cyan")
    table.add_column("Address", style="white")
    table.add_column("Auth", style="yellow")
    for profile in profiles:
        table.add_row(
            profile["name"],
            f"{profile.get('username', 'root')}@{profile['host']}:{profile.get('port', 22)}",
            profile.get("auth_type", "key"),
        )
    console.print(table)


@hosts.command("remove")
@click.argument("name")
@click.pass_context
def hosts_remove(ctx: click.Context, name: str) -> None:
    """Delete a saved bridge host and its stored password."""
    settings = _settings(ctx)
    profile = settings.get_host(name)
    if profile is None or not settings.delete_host(name):
        err_console.print(f"[red]✗ No bridge host named {name!r}[/red]")
        sys.exit(int(ExitCode.ERROR))
    if profile.get("auth_type") == "password":
        try:
            SSHTransport(profile["host"], int(profile.get("port", 22)), profile.get("username", "root")).delete_password()
        except KeyringError as exc:
            logger.warning("Could not remove stored password for %s: %s", name, exc)
    console.print(f"[green]✓ Removed {name}[/green]")


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
