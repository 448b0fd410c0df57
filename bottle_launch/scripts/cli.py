#!/usr/bin/env python3
"""
bottle-launch command line interface

Usage:
    bottle-launch create <bottle> <size> [--yubikey] [--device DEV]
    bottle-launch run <bottle> [app_id] [-- extra_args...]
    bottle-launch list
    bottle-launch delete <bottle> [--yes]
    bottle-launch permissions <bottle> [--enable NAME] [--disable NAME]
    bottle-launch apps

Bottle storage: ~/.local/share/bottles/ (or $BOTTLE_DIR)
Config storage: ~/.config/bottle-launch/
Logs:           ~/.local/state/bottle-launch/logs/
"""

import argparse
import getpass
import logging
import sys
import traceback
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt
from rich.table import Table

from ..core.config import ConfigCorruptedError, load_bottle_config, save_bottle_config
from ..core.constants import ExitCodes
from ..core.dependencies import MOUNT_TOOLS, MissingToolError, require_tools
from ..core.limits import Limits
from ..core.modes import PERMISSION_DEFS, BottleContainer, HardwareKeyCredential, PermissionSet
from ..core.paths import Paths
from ..core.secrets import (
    HardwareKeySecretProvider,
    PasswordSecretProvider,
    SecretAccessError,
    choose_device,
    provision_hardware_key,
    secure_wipe_buffer,
)
from ..core.version import VERSION
from .bottle import BottleError, BottleManager, list_bottles, parse_size, resolve_bottle_path
from .fido2_cli import Fido2Device, Fido2Error, Fido2Tool
from .flatpak import list_flatpak_apps
from .locator import DeviceLocator
from .session import BottleSession
from .tool_runner import ToolRunner
from .udisks_cli import VolumeError, WrongCredentialError

_cli_logger = logging.getLogger("bottle_launch.cli")

console = Console()
err_console = Console(stderr=True)

# Handlers installed by setup_logging, replaced on repeated calls
_installed_handlers: List[logging.Handler] = []


# =============================================================================
# Logging
# =============================================================================


def setup_logging(verbose: bool = False) -> logging.Logger:
    """
    Set up the rotating log file plus a stderr handler.

    The file always receives DEBUG; stderr shows WARNING unless verbose.
    """
    logger = logging.getLogger("bottle_launch")
    for handler in _installed_handlers:
        logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    log_dir = Paths.logs_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    # Configure rotating file handler (5MB max, 3 backups)
    file_handler = RotatingFileHandler(
        str(Paths.log_file()),
        maxBytes=Limits.MAX_LOG_FILE_SIZE,
        backupCount=Limits.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    file_handler.setLevel(logging.DEBUG)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stderr_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)

    logger.setLevel(logging.DEBUG)
    for handler in (file_handler, stderr_handler):
        logger.addHandler(handler)
        _installed_handlers.append(handler)
    return logger


def create_exception_hook(logger: logging.Logger):
    """Global exception hook that logs unhandled exceptions."""

    def exception_hook(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception", exc_info=(exc_type, exc_value, exc_traceback))
        tb_text = "".join(traceback.format_exception(exc_type, exc_value, exc_traceback))
        print(f"FATAL ERROR:\n{tb_text}", file=sys.stderr)

    return exception_hook


# =============================================================================
# Prompts
# =============================================================================


def _print_error(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}", highlight=False)


def _prompt_new_password() -> str:
    password = getpass.getpass("New bottle password: ")
    if not password:
        raise BottleError("bottle", "password required")
    if getpass.getpass("Confirm password: ") != password:
        raise BottleError("bottle", "passwords do not match")
    return password


def _prompt_device(devices: List[Fido2Device]) -> Optional[Fido2Device]:
    """Interactive chooser for several connected security keys."""
    table = Table(title="Security keys")
    table.add_column("#", justify="right")
    table.add_column("Device")
    for index, device in enumerate(devices, start=1):
        table.add_row(str(index), device.display_name)
    console.print(table)
    choice = IntPrompt.ask("Use key", choices=[str(i) for i in range(1, len(devices) + 1)], default=1)
    return devices[choice - 1]


# =============================================================================
# Commands
# =============================================================================


def cmd_create(args, runner: ToolRunner) -> int:
    path = resolve_bottle_path(args.bottle)
    size = parse_size(args.size)
    manager = BottleManager(runner)

    if args.yubikey:
        fido2 = Fido2Tool(runner)
        fido2.check_tools()
        device = choose_device(fido2.list_devices(), args.device, chooser=_prompt_device)
        console.print(f"Touch your security key [bold]{device.path}[/bold] (twice) to enroll this bottle...")
        credential, secret = provision_hardware_key(fido2, device.path)
        try:
            bottle = manager.create_hardware_key_bottle(path, size, credential, secret)
        finally:
            secure_wipe_buffer(secret)
    else:
        bottle = manager.create_password_bottle(path, size, _prompt_new_password())

    console.print(Panel(f"Created [bold]{bottle.name}[/bold]\n{bottle.file_path}", title="bottle-launch", style="green"))
    return ExitCodes.SUCCESS


def _open_session(session: BottleSession, args, runner: ToolRunner) -> None:
    credential = session.config.credential

    if isinstance(credential, HardwareKeyCredential):
        provider = HardwareKeySecretProvider(
            credential, fido2=Fido2Tool(runner), device=args.device, chooser=_prompt_device
        )
        console.print("Touch your security key to unlock the bottle...")
        session.open(provider)
        return

    for attempt in range(1, Limits.PASSWORD_MAX_ATTEMPTS + 1):
        # Empty input leaves the prompt to udisks/polkit
        provider = PasswordSecretProvider(getpass.getpass(f"Password for {session.bottle.name}: "))
        try:
            session.open(provider)
            return
        except WrongCredentialError:
            if attempt == Limits.PASSWORD_MAX_ATTEMPTS:
                raise
            err_console.print(f"[yellow]Wrong password[/yellow] ({attempt}/{Limits.PASSWORD_MAX_ATTEMPTS})")
        finally:
            provider.wipe()


def cmd_run(args, runner: ToolRunner) -> int:
    require_tools(MOUNT_TOOLS, which=runner.which)
    path = resolve_bottle_path(args.bottle)
    if not path.exists():
        raise BottleError("bottle", f"not found: {path}")

    session = BottleSession(path, runner)
    app_id = args.app_id or session.config.permissions.last_app
    if not app_id:
        raise BottleError("run", "no app id given and no previous app recorded for this bottle")

    session.coordinator.install_signal_handlers(cli_mode=True)
    try:
        with session:
            _open_session(session, args, runner)
            console.print(f"Mounted at [bold]{session.mount_point}[/bold], starting {app_id}")
            returncode = session.run_app(app_id, extra_args=args.extra_args)
    finally:
        session.coordinator.restore_signal_handlers()

    return ExitCodes.SUCCESS if returncode == 0 else ExitCodes.FAILURE


def cmd_list(args, runner: ToolRunner) -> int:
    bottles = list_bottles()
    locator = DeviceLocator(runner)

    table = Table(title=f"Bottles in {Paths.bottle_dir()}")
    table.add_column("Bottle")
    table.add_column("Status")
    table.add_column("Loop")
    table.add_column("Crypt")
    table.add_column("Mount")

    for path in bottles:
        state = locator.probe(path)
        table.add_row(
            path.name,
            state.stage.display_name,
            state.loop_device or "",
            state.cleartext_device or "",
            state.mount_point or "",
        )

    if not bottles:
        console.print("(no bottles)")
    else:
        console.print(table)
    return ExitCodes.SUCCESS


def cmd_delete(args, runner: ToolRunner) -> int:
    path = resolve_bottle_path(args.bottle)
    if not path.exists():
        raise BottleError("bottle", f"not found: {path}")
    if not args.yes and not Confirm.ask(f"Delete {path.name} and all data inside it?", default=False):
        console.print("Cancelled.")
        return ExitCodes.FAILURE
    BottleManager(runner).delete_bottle(path)
    console.print(f"Deleted {path.name}")
    return ExitCodes.SUCCESS


def cmd_permissions(args, runner: ToolRunner) -> int:
    bottle = BottleContainer.from_path(resolve_bottle_path(args.bottle))
    config = load_bottle_config(bottle.config_path)

    changed = False
    for name in args.enable or []:
        config.permissions.set_flag(name, True)
        changed = True
    for name in args.disable or []:
        config.permissions.set_flag(name, False)
        changed = True
    if changed:
        save_bottle_config(bottle.config_path, config)

    _print_permissions(bottle, config.permissions, config.credential.kind.display_name)
    return ExitCodes.SUCCESS


def _print_permissions(bottle: BottleContainer, permissions: PermissionSet, unlock: str) -> None:
    table = Table(title=f"{bottle.name} ({unlock})")
    table.add_column("Key")
    table.add_column("Permission")
    table.add_column("Enabled")
    for definition in PERMISSION_DEFS:
        enabled = getattr(permissions, definition.name)
        table.add_row(definition.key, definition.label, "[green]yes[/green]" if enabled else "[red]no[/red]")
    console.print(table)
    if permissions.last_app:
        console.print(f"Last app: {permissions.last_app}")


def cmd_apps(args, runner: ToolRunner) -> int:
    apps = list_flatpak_apps(runner)
    if not apps:
        console.print("No Flatpak applications found.")
        return ExitCodes.SUCCESS
    table = Table(title="Flatpak applications")
    table.add_column("Name")
    table.add_column("Application ID")
    for app in apps:
        table.add_row(app.name, app.app_id)
    console.print(table)
    return ExitCodes.SUCCESS


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bottle-launch",
        description="Run Flatpak applications with their data in encrypted LUKS2 bottles.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logging on stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a new encrypted bottle")
    create.add_argument("bottle", help="Bottle name or path (.bottle appended)")
    create.add_argument("size", help="Size, e.g. 500M or 2G")
    create.add_argument("--yubikey", action="store_true", help="Unlock with a FIDO2 security key instead of a password")
    create.add_argument("--device", help="Security key device (e.g. /dev/hidraw3)")
    create.set_defaults(func=cmd_create)

    run = sub.add_parser("run", help="Run a Flatpak app with its data in a bottle")
    run.add_argument("bottle")
    run.add_argument("app_id", nargs="?", help="Flatpak application id (default: last app)")
    run.add_argument("extra_args", nargs=argparse.REMAINDER, help="Arguments after -- are passed to the app")
    run.add_argument("--device", help="Security key device for hardware-key bottles")
    run.set_defaults(func=cmd_run)

    lst = sub.add_parser("list", help="List bottles and their mount state")
    lst.set_defaults(func=cmd_list)

    delete = sub.add_parser("delete", help="Delete a bottle and its settings")
    delete.add_argument("bottle")
    delete.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    delete.set_defaults(func=cmd_delete)

    perms = sub.add_parser("permissions", help="Show or change sandbox permissions of a bottle")
    perms.add_argument("bottle")
    perms.add_argument("--enable", action="append", metavar="NAME", help="Enable a permission (repeatable)")
    perms.add_argument("--disable", action="append", metavar="NAME", help="Disable a permission (repeatable)")
    perms.set_defaults(func=cmd_permissions)

    apps = sub.add_parser("apps", help="List installed Flatpak applications")
    apps.set_defaults(func=cmd_apps)

    return parser


def main(argv: Optional[List[str]] = None, runner: Optional[ToolRunner] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "extra_args", None) and args.extra_args[0] == "--":
        args.extra_args = args.extra_args[1:]

    logger = setup_logging(verbose=args.verbose)
    sys.excepthook = create_exception_hook(logger)
    runner = runner or ToolRunner()

    _cli_logger.info(f"cli.start: command={args.command}, version={VERSION}")
    try:
        return args.func(args, runner)
    except WrongCredentialError:
        _print_error("wrong password or security key")
    except (
        VolumeError,
        BottleError,
        ConfigCorruptedError,
        MissingToolError,
        SecretAccessError,
        Fido2Error,
        ValueError,
        OSError,
    ) as e:
        _cli_logger.error(f"cli.failed: command={args.command}, error={e}")
        _print_error(str(e))
    except KeyboardInterrupt:
        err_console.print("Interrupted.")
        return ExitCodes.INTERRUPTED
    return ExitCodes.FAILURE


if __name__ == "__main__":
    sys.exit(main())
