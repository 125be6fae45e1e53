"""CLI interface for spmirror."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import click

from .api import SharePointClient
from .config import config
from .exceptions import (
    SharePointAPIError,
    SharePointConfigError,
    SyncAbortedError,
    SyncSetupError,
)
from .log import SyncLogger
from .output import OutputFormatter
from .sync import (
    DateFilters,
    LocalFilesystem,
    LocalStateInspector,
    MismatchPolicy,
    NameFilter,
    SyncEngine,
    SyncStats,
)
from .utils import (
    DEFAULT_FILTER_TOKEN,
    DEFAULT_PAGE_SIZE,
    DEFAULT_STEP_MINUTES,
    DEFAULT_WORKERS,
    parse_cli_datetime,
)

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "spmirror.log"


class DateTimeParam(click.ParamType):
    """ISO date or datetime; naive values are taken as UTC."""

    name = "datetime"

    def convert(self, value: Any, param: Any, ctx: Any) -> datetime:
        if isinstance(value, datetime):
            return value
        try:
            return parse_cli_datetime(value)
        except ValueError:
            self.fail(f"{value!r} is not an ISO date or datetime", param, ctx)


DATETIME = DateTimeParam()


@click.group()
@click.option(
    "--site-url", "-s", envvar="SPMIRROR_SITE_URL", help="SharePoint site URL"
)
@click.option(
    "--token", "-t", envvar="SPMIRROR_ACCESS_TOKEN", help="OAuth bearer access token"
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option()
@click.pass_context
def main(
    ctx: Any,
    site_url: Optional[str],
    token: Optional[str],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """spmirror - Mirror SharePoint document libraries to a local directory."""
    ctx.ensure_object(dict)
    ctx.obj["site_url"] = site_url
    ctx.obj["token"] = token
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["quiet"] = quiet
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("spmirror").setLevel(logging.DEBUG)
        # Request-level chatter from httpx is only useful when debugging
        logging.getLogger("httpx").setLevel(logging.INFO)
    else:
        logging.basicConfig(level=logging.WARNING)


def _create_client(ctx: Any, workers: Optional[int] = None) -> SharePointClient:
    """Build a connected client from CLI options and configuration.

    Exits with status 1 when the site cannot be reached or authenticated.

    Args:
        ctx: Click context
        workers: Concurrent workers sharing the client; the connection pool
            is sized to match so no worker waits for a free connection
    """
    out: OutputFormatter = ctx.obj["out"]
    site_url = ctx.obj.get("site_url") or config.site_url
    token = ctx.obj.get("token") or config.access_token
    logger.debug("Connecting to %s", site_url)

    try:
        if workers:
            client = SharePointClient(
                site_url=site_url, access_token=token, max_connections=workers
            )
        else:
            client = SharePointClient(site_url=site_url, access_token=token)
    except SharePointConfigError as e:
        out.error(str(e))
        out.info("Run 'spmirror init' or set SPMIRROR_SITE_URL/SPMIRROR_ACCESS_TOKEN.")
        ctx.exit(1)

    try:
        client.connect()
    except SharePointAPIError as e:
        client.close()
        out.error(f"Cannot connect to {site_url}: {e}")
        ctx.exit(1)

    return client


def _print_stats(out: OutputFormatter, stats: SyncStats) -> None:
    if out.json_output:
        out.output_json(stats.as_dict())
        return
    out.success(stats.summary())


@main.command()
@click.option("--site-url", prompt="SharePoint site URL", help="SharePoint site URL")
@click.option(
    "--token",
    prompt="Access token",
    hide_input=True,
    help="OAuth bearer access token",
)
@click.pass_context
def init(ctx: Any, site_url: str, token: str) -> None:
    """Store the site URL and access token.

    The credentials are validated against the site before they are saved.
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        with SharePointClient(site_url=site_url, access_token=token) as client:
            web = client.connect()
        out.success(f"Connected to {web.get('Title') or site_url}")
    except SharePointAPIError as e:
        out.error(f"Validation failed: {e}")
        if not click.confirm("Save configuration anyway?", default=False):
            out.warning("Configuration cancelled.")
            ctx.exit(1)

    config_path = config.save_credentials(site_url.rstrip("/"), token)
    out.success(f"Configuration saved to {config_path}")


@main.command()
@click.option(
    "--token-filter",
    "-f",
    default=DEFAULT_FILTER_TOKEN,
    show_default=True,
    help="Substring a library title must contain to be mirrored",
)
@click.pass_context
def libraries(ctx: Any, token_filter: str) -> None:
    """List the site's document libraries."""
    out: OutputFormatter = ctx.obj["out"]
    name_filter = NameFilter(token_filter)

    client = _create_client(ctx)
    try:
        libs = client.list_document_libraries()
    except SharePointAPIError as e:
        out.error(f"Cannot list document libraries: {e}")
        ctx.exit(1)
    finally:
        client.close()

    rows = [
        [
            lib.title,
            lib.server_relative_url,
            "yes" if name_filter.matches(lib.title) else "no",
        ]
        for lib in libs
    ]
    out.output_table(
        ["Title", "URL", "Mirrored"], rows, title=f"{len(libs)} document libraries"
    )


def sync_options(func: Any) -> Any:
    """Options shared by the mirror commands."""
    options = [
        click.argument(
            "local_root", type=click.Path(file_okay=False, path_type=Path)
        ),
        click.option(
            "--token-filter",
            "-f",
            default=DEFAULT_FILTER_TOKEN,
            show_default=True,
            help="Substring every mirrored folder name must contain",
        ),
        click.option(
            "--modified-after",
            type=DATETIME,
            default=None,
            help="Re-download existing files modified after this time",
        ),
        click.option(
            "--created-after",
            type=DATETIME,
            default=None,
            help="Re-download existing files created after this time",
        ),
        click.option(
            "--on-mismatch",
            type=click.Choice([policy.value for policy in MismatchPolicy]),
            default=MismatchPolicy.REDOWNLOAD.value,
            show_default=True,
            help="What to do when a local file's creation time differs",
        ),
        click.option(
            "--page-size",
            type=click.IntRange(1, 5000),
            default=DEFAULT_PAGE_SIZE,
            show_default=True,
            help="Rows per page for library listings",
        ),
        click.option(
            "--workers",
            "-j",
            type=click.IntRange(min=1),
            default=DEFAULT_WORKERS,
            show_default=True,
            help="Maximum concurrent downloads and listings",
        ),
        click.option(
            "--log-file",
            type=click.Path(dir_okay=False, path_type=Path),
            default=DEFAULT_LOG_FILE,
            show_default=True,
            help="Run log file (appended to)",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_engine(
    client: SharePointClient,
    log: SyncLogger,
    local_root: Path,
    token_filter: str,
    modified_after: Optional[datetime],
    created_after: Optional[datetime],
    on_mismatch: str,
    page_size: int,
    workers: int,
) -> SyncEngine:
    fs = LocalFilesystem(local_root)
    inspector = LocalStateInspector(
        fs,
        filters=DateFilters(modified_after=modified_after, created_after=created_after),
        mismatch_policy=MismatchPolicy(on_mismatch),
    )
    return SyncEngine(
        client,
        local_root,
        log,
        name_filter=NameFilter(token_filter),
        inspector=inspector,
        fs=fs,
        workers=workers,
        page_size=page_size,
    )


def _run_sync(ctx: Any, log_file: Path, run: Any) -> None:
    """Run a sync callable with the CLI's exit code conventions.

    Args:
        ctx: Click context
        log_file: Run log path
        run: Callable taking a SyncLogger and returning SyncStats
    """
    out: OutputFormatter = ctx.obj["out"]
    log = SyncLogger(log_file=log_file, echo=not ctx.obj["quiet"])

    try:
        stats = run(log)
    except (SyncSetupError, SyncAbortedError) as e:
        out.error(str(e))
        ctx.exit(1)
    except KeyboardInterrupt:
        out.warning("Sync interrupted by user")
        ctx.exit(130)  # Standard exit code for SIGINT
    finally:
        log.close()

    _print_stats(out, stats)


@main.command()
@sync_options
@click.option(
    "--path",
    "-p",
    "start_path",
    default=None,
    help="Folder path or library title to mirror instead of all libraries",
)
@click.pass_context
def mirror(
    ctx: Any,
    local_root: Path,
    token_filter: str,
    modified_after: Optional[datetime],
    created_after: Optional[datetime],
    on_mismatch: str,
    page_size: int,
    workers: int,
    log_file: Path,
    start_path: Optional[str],
) -> None:
    """Mirror document libraries (or one folder) into LOCAL_ROOT.

    Only folders whose names contain the filter token are descended into.
    Files already present with matching timestamps are skipped.
    """
    client = _create_client(ctx, workers)

    def run(log: SyncLogger) -> SyncStats:
        engine = _build_engine(
            client,
            log,
            local_root,
            token_filter,
            modified_after,
            created_after,
            on_mismatch,
            page_size,
            workers,
        )
        return engine.mirror(start_path)

    try:
        _run_sync(ctx, log_file, run)
    finally:
        client.close()


@main.command("mirror-range")
@sync_options
@click.option("--library", "-l", required=True, help="Document library title")
@click.option(
    "--start", "range_start", type=DATETIME, required=True, help="Range start"
)
@click.option("--end", "range_end", type=DATETIME, required=True, help="Range end")
@click.option(
    "--step-minutes",
    type=click.IntRange(min=1),
    default=DEFAULT_STEP_MINUTES,
    show_default=True,
    help="Initial query window size in minutes",
)
@click.option(
    "--date-field",
    type=click.Choice(["Modified", "Created"]),
    default="Modified",
    show_default=True,
    help="Field the time windows filter on",
)
@click.pass_context
def mirror_range(
    ctx: Any,
    local_root: Path,
    token_filter: str,
    modified_after: Optional[datetime],
    created_after: Optional[datetime],
    on_mismatch: str,
    page_size: int,
    workers: int,
    log_file: Path,
    library: str,
    range_start: datetime,
    range_end: datetime,
    step_minutes: int,
    date_field: str,
) -> None:
    """Mirror a library's files whose date falls in [START, END).

    The range is queried in windows of --step-minutes. Windows refused by
    the list view threshold are split into smaller windows automatically.
    """
    out: OutputFormatter = ctx.obj["out"]
    if range_end <= range_start:
        out.error("--end must be after --start")
        ctx.exit(1)

    client = _create_client(ctx, workers)

    def run(log: SyncLogger) -> SyncStats:
        engine = _build_engine(
            client,
            log,
            local_root,
            token_filter,
            modified_after,
            created_after,
            on_mismatch,
            page_size,
            workers,
        )
        return engine.mirror_date_range(
            library,
            range_start,
            range_end,
            step_minutes=step_minutes,
            date_field=date_field,
        )

    try:
        _run_sync(ctx, log_file, run)
    finally:
        client.close()


if __name__ == "__main__":
    main()
