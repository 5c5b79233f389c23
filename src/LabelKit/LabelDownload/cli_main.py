# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.cli_main",
#   "purpose": "Main Typer CLI app for label downloads with settings integration.",
#   "sections": [
#     {
#       "id": "clicontext",
#       "name": "CliContext",
#       "anchor": "class-clicontext",
#       "kind": "class"
#     },
#     {
#       "id": "get-context",
#       "name": "get_context",
#       "anchor": "function-get-context",
#       "kind": "function"
#     },
#     {
#       "id": "main",
#       "name": "main",
#       "anchor": "function-main",
#       "kind": "function"
#     },
#     {
#       "id": "inspect-cmd",
#       "name": "inspect_cmd",
#       "anchor": "function-inspect-cmd",
#       "kind": "function"
#     },
#     {
#       "id": "types-cmd",
#       "name": "types_cmd",
#       "anchor": "function-types-cmd",
#       "kind": "function"
#     },
#     {
#       "id": "version-cmd",
#       "name": "version_cmd",
#       "anchor": "function-version-cmd",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Main Typer CLI app for label downloads.

Provides a structured Typer CLI with:
- Global options (-v/-vv, --format)
- ``inspect`` to download, unwrap, and review a label installer
- ``types`` to list declared container types and their label aliases
- ``settings show`` for the effective configuration
- ``version``

Example:
    $ labelfetch inspect dmg https://example.com/App.dmg
    $ labelfetch --format json inspect pkgInZip https://example.com/tool.zip --yes
"""

import json

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from LabelKit.LabelDownload import __version__
from LabelKit.LabelDownload.cli_settings_commands import settings_app
from LabelKit.LabelDownload.download import DownloadProgress
from LabelKit.LabelDownload.logging_utils import setup_logging
from LabelKit.LabelDownload.models import DeclaredType, FinalizeMode
from LabelKit.LabelDownload.pipeline import (
    IdentityReviewReady,
    LabelInspectionPipeline,
    ResolutionFailed,
)
from LabelKit.LabelDownload.settings import get_default_config

_FORMATS = ("table", "json")

# Global console for output
_console = Console()


class CliContext:
    """Context object shared by commands of one invocation."""

    def __init__(self, verbosity: int = 0, format_output: str = "table"):
        self.verbosity = verbosity
        self.format_output = format_output
        self.console = _console
        self.settings = get_default_config()

    def log_debug(self, message: str) -> None:
        """Log debug message if verbosity >= 2."""
        if self.verbosity >= 2:
            self.console.print(f"[dim]DEBUG: {message}[/dim]")

    def log_info(self, message: str) -> None:
        """Log info message if verbosity >= 1."""
        if self.verbosity >= 1:
            self.console.print(f"[cyan]INFO: {message}[/cyan]")


app = typer.Typer(
    name="labelfetch",
    help="labelfetch - Download label installers and inspect their identity",
    no_args_is_help=True,
)

_context: CliContext | None = None


def get_context() -> CliContext:
    """Get the current CLI context.

    Raises:
        RuntimeError: If context hasn't been initialized
    """
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


def current_format() -> str:
    return _context.format_output if _context is not None else "table"


@app.callback(invoke_without_command=False)
def main(
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    ),
    format_output: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format: table or json",
    ),
) -> None:
    """Download vendor installers by label type and review what is inside.

    Global options go before the subcommand:

        labelfetch -vv --format json inspect dmg https://example.com/App.dmg
    """
    global _context

    format_output = format_output.lower()
    if format_output not in _FORMATS:
        typer.echo(f"Unsupported format: {format_output}", err=True)
        raise typer.Exit(2)

    try:
        _context = CliContext(verbosity=verbosity, format_output=format_output)
    except ValidationError as exc:
        typer.echo(f"Error loading settings: {exc}", err=True)
        raise typer.Exit(2)

    level = {0: "WARNING", 1: "INFO"}.get(verbosity, "DEBUG")
    logging_config = _context.settings.logging.model_copy(update={"level": level})
    setup_logging(logging_config)
    _context.log_debug(f"Verbosity: {verbosity}")
    _context.log_debug(f"Format: {format_output}")


app.add_typer(
    settings_app,
    name="settings",
    help="Settings management (show)",
)


def _render_ready(ctx: CliContext, outcome: IdentityReviewReady) -> None:
    table = Table(title=f"Identity candidates ({outcome.artifact.kind.value}: {outcome.artifact.path.name})")
    table.add_column("Identifier", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Minimum OS", style="magenta")
    for candidate in outcome.candidates:
        table.add_row(candidate.identifier, candidate.version, candidate.minimum_os or "-")
    ctx.console.print(table)

    signature = outcome.signature
    status = "[green]accepted[/green]" if signature.accepted else "[red]not accepted[/red]"
    ctx.console.print(
        f"Signature: {status}  Developer: {signature.developer_id}  Team: {signature.developer_team}"
    )


def _ready_payload(outcome: IdentityReviewReady, mode: FinalizeMode) -> dict:
    return {
        "status": "ready",
        "artifact": {"kind": outcome.artifact.kind.value, "name": outcome.artifact.path.name},
        "candidates": [
            {
                "identifier": candidate.identifier,
                "version": candidate.version,
                "minimum_os": candidate.minimum_os,
            }
            for candidate in outcome.candidates
        ],
        "signature": {
            "accepted": outcome.signature.accepted,
            "developer_id": outcome.signature.developer_id,
            "developer_team": outcome.signature.developer_team,
            "source": outcome.signature.source,
        },
        "finalized": mode.value,
    }


@app.command("inspect")
def inspect_cmd(
    declared_type: str = typer.Argument(..., metavar="TYPE", help="Declared container type or label alias"),
    url: str = typer.Argument(..., help="Download URL"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Commit without prompting"),
) -> None:
    """Download URL, unwrap it as TYPE, and review the installer identity.

    The workspace is always released: committed when confirmed, cancelled
    otherwise.

    Example:
        $ labelfetch inspect pkgInDmg https://example.com/Tool.dmg --yes
    """
    ctx = get_context()
    as_json = ctx.format_output == "json"

    with LabelInspectionPipeline(ctx.settings) as pipeline:
        outcome = None
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.fields[size]}"),
            console=ctx.console,
            transient=True,
            disable=as_json,
        ) as progress:
            task = progress.add_task("Downloading", total=None, size="")
            for event in pipeline.iter_resolve(declared_type, url):
                if isinstance(event, DownloadProgress):
                    progress.update(
                        task,
                        completed=event.bytes_written,
                        total=event.bytes_expected,
                        size=event.describe(),
                    )
                else:
                    outcome = event

        if isinstance(outcome, ResolutionFailed):
            outcome.finalize(FinalizeMode.CANCEL)
            if as_json:
                typer.echo(json.dumps({"status": "failed", "error": outcome.message}))
            else:
                ctx.console.print(f"[red]✗ {outcome.message}[/red]")
            raise typer.Exit(1)

        if not as_json:
            _render_ready(ctx, outcome)
        confirmed = yes or (not as_json and typer.confirm("Commit this identity?", default=False))
        mode = FinalizeMode.COMMIT if confirmed else FinalizeMode.CANCEL
        outcome.finalize(mode)
        ctx.log_info(f"Workspace finalized with {mode.value}")
        if as_json:
            typer.echo(json.dumps(_ready_payload(outcome, mode)))
        else:
            ctx.console.print(f"[green]✓ Finalized ({mode.value})[/green]")


@app.command("types")
def types_cmd() -> None:
    """List declared container types, their label aliases, and terminal kinds."""
    ctx = get_context()
    rows = [
        {
            "type": declared.value,
            "aliases": list(declared.aliases),
            "terminal": declared.terminal_kind.value,
        }
        for declared in DeclaredType
    ]
    if ctx.format_output == "json":
        typer.echo(json.dumps(rows, indent=2))
        return
    table = Table(title="Declared container types")
    table.add_column("Type", style="cyan")
    table.add_column("Aliases", style="yellow")
    table.add_column("Terminal", style="green")
    for row in rows:
        table.add_row(row["type"], ", ".join(row["aliases"]) or "-", row["terminal"])
    ctx.console.print(table)


@app.command("version")
def version_cmd() -> None:
    """Show version information.

    Example:
        $ labelfetch version
    """
    ctx = get_context()
    ctx.console.print(f"[bold]labelfetch[/bold] version {__version__}")


__all__ = [
    "app",
    "CliContext",
    "current_format",
    "get_context",
    "main",
]
