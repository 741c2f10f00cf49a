"""CLI interface for cloudsync."""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import click
from rich.table import Table

from .backends import create_backend
from .config import Config, config
from .exceptions import AuthError, CloudSyncError, ConfigError, ManifestCorruptError
from .output import OutputFormatter
from .sync import ManifestStore, SyncEngine, SyncMode
from .utils import format_timestamp

logger = logging.getLogger(__name__)


def _format_local_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@click.group()
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="CLOUDSYNC_CONFIG_DIR",
    help="Configuration directory (default: ~/.config/cloudsync)",
)
@click.version_option(package_name="cloudsync")
@click.pass_context
def main(ctx: Any, quiet: bool, json: bool, verbose: bool, config_dir: Path) -> None:
    """cloudsync - Keep a local folder in two-way sync with a cloud drive."""
    # Store settings in context for subcommands to access
    ctx.ensure_object(dict)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["config"] = Config(config_dir) if config_dir else config
    ctx.obj["verbose"] = verbose

    # Configure logging based on verbose flag
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("cloudsync").setLevel(logging.DEBUG)
    else:
        # Set default logging level to WARNING to suppress debug/info messages
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.argument(
    "folder", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.argument("account", type=str)
@click.option(
    "--fresh",
    "-f",
    is_flag=True,
    help="Ignore the sync state and compare file contents from scratch",
)
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.option(
    "--workers",
    "-j",
    type=click.IntRange(min=1),
    default=None,
    help="Number of parallel transfers (default: from settings, 4)",
)
@click.option(
    "--keep-conflicts",
    is_flag=True,
    help="Keep the losing version of a conflict as a renamed copy",
)
@click.option("--no-progress", is_flag=True, help="Disable progress output")
@click.pass_context
def sync(
    ctx: Any,
    folder: Path,
    account: str,
    fresh: bool,
    dry_run: bool,
    workers: Optional[int],
    keep_conflicts: bool,
    no_progress: bool,
) -> None:
    """Sync a local FOLDER with the cloud drive of ACCOUNT.

    Changes on either side are carried to the other: new and modified
    files are transferred, deletions are propagated, and files changed on
    both sides are resolved in favour of the most recent version.

    Examples:
        cloudsync sync ~/Documents work
        cloudsync sync ~/Photos personal --fresh
        cloudsync sync ./notes work --dry-run -j 8
    """
    out: OutputFormatter = ctx.obj["out"]
    cfg: Config = ctx.obj["config"]

    try:
        settings = cfg.load_settings()
        acct = cfg.get_account(account)
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)
        return  # Unreachable, but helps type checker

    if workers is not None:
        settings.max_workers = workers
    if keep_conflicts:
        settings.keep_conflict_copies = True

    if acct.is_expired:
        out.error(
            f"Token of account '{account}' expired on "
            f"{_format_local_time(acct.valid_till or 0)}, please log in again"
        )
        ctx.exit(2)

    mode = SyncMode.FRESH if fresh else SyncMode.INCREMENTAL
    engine_out = OutputFormatter(
        json_output=out.json_output, quiet=no_progress or out.quiet
    )
    engine = SyncEngine(ManifestStore(cfg.state_dir), engine_out, settings)
    cancel_event = threading.Event()

    try:
        with create_backend(
            acct.service,
            acct.access_token,
            remote_root=acct.remote_root,
            **acct.options,
        ) as backend:
            report = engine.run(
                folder,
                backend,
                mode=mode,
                account_name=account,
                dry_run=dry_run,
                cancel_event=cancel_event,
            )
    except KeyboardInterrupt:
        cancel_event.set()
        out.warning("\nSync cancelled by user")
        ctx.exit(130)
        return
    except AuthError as e:
        out.error(f"Authentication failed: {e}")
        out.error(f"Please log in to account '{account}' again")
        ctx.exit(2)
        return
    except CloudSyncError as e:
        out.error(f"Error: {e}")
        ctx.exit(1)
        return

    if out.json_output:
        out.output_json(report.to_dict())

    if report.failed:
        ctx.exit(1)


@main.command()
@click.argument(
    "folder", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.argument("account", type=str)
@click.pass_context
def status(ctx: Any, folder: Path, account: str) -> None:
    """Show the stored sync state of FOLDER for ACCOUNT."""
    out: OutputFormatter = ctx.obj["out"]
    cfg: Config = ctx.obj["config"]
    store = ManifestStore(cfg.state_dir)

    try:
        manifest = store.load(account, folder)
    except ManifestCorruptError as e:
        out.error(f"Sync state is corrupt: {e}")
        out.info("Run 'cloudsync reset' or sync with --fresh to rebuild it")
        ctx.exit(1)
        return

    if manifest is None:
        if out.json_output:
            out.output_json({"synced": False})
        else:
            out.warning(f"{folder} has never been synced with '{account}'")
        return

    info = {
        "synced": True,
        "manifest": str(store.get_manifest_file(account, folder)),
        "files": len(manifest.live_entries),
        "tombstones": len(manifest.tombstones),
        "last_full_sync": (
            format_timestamp(manifest.last_full_sync)
            if manifest.last_full_sync is not None
            else None
        ),
    }
    if out.json_output:
        out.output_json(info)
        return

    out.info(f"Sync state: {info['manifest']}")
    out.info(f"  Tracked files: {info['files']}")
    out.info(f"  Deleted files remembered: {info['tombstones']}")
    if manifest.last_full_sync is not None:
        out.info(f"  Last sync: {_format_local_time(manifest.last_full_sync)}")
    else:
        out.info("  Last sync: never completed")


@main.command()
@click.argument(
    "folder", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.argument("account", type=str)
@click.pass_context
def reset(ctx: Any, folder: Path, account: str) -> None:
    """Forget the sync state of FOLDER for ACCOUNT.

    The next sync compares both sides from scratch, as with --fresh.
    """
    out: OutputFormatter = ctx.obj["out"]
    cfg: Config = ctx.obj["config"]

    if ManifestStore(cfg.state_dir).clear(account, folder):
        out.success(f"Sync state of {folder} for '{account}' cleared")
    else:
        out.info(f"No sync state stored for {folder} and '{account}'")


@main.command()
@click.pass_context
def accounts(ctx: Any) -> None:
    """List configured accounts."""
    out: OutputFormatter = ctx.obj["out"]
    cfg: Config = ctx.obj["config"]

    try:
        configured = cfg.load_accounts()
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    if out.json_output:
        out.output_json(
            [
                {
                    "name": acct.name,
                    "service": acct.service,
                    "remote_root": acct.remote_root,
                    "valid_till": acct.valid_till,
                    "expired": acct.is_expired,
                }
                for acct in configured.values()
            ]
        )
        return

    if not configured:
        out.warning(f"No accounts configured in {cfg.accounts_file}")
        return

    table = Table(title="Accounts")
    table.add_column("Name")
    table.add_column("Service")
    table.add_column("Remote root")
    table.add_column("Token")
    for name in sorted(configured):
        acct = configured[name]
        if acct.valid_till is None:
            token = "unknown expiry"
        elif acct.is_expired:
            token = "[red]expired[/red]"
        else:
            token = f"valid till {_format_local_time(acct.valid_till)}"
        table.add_row(name, acct.service, acct.remote_root or "/", token)
    out.print_table(table)


if __name__ == "__main__":
    main()
