# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.cli_settings_commands",
#   "purpose": "CLI commands for settings inspection",
#   "sections": [
#     {
#       "id": "show",
#       "name": "show",
#       "anchor": "function-show",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""CLI commands for settings management.

Example:
    $ labelfetch settings show
    $ labelfetch settings show --format json
"""

import json
import os
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from LabelKit.LabelDownload.settings import LabelDownloadSettings, get_default_config

settings_app = typer.Typer(
    name="settings",
    help="Inspect LabelDownloadSettings configuration",
    short_help="Settings management (show)",
)

_ENV_PREFIX = "LABELFETCH_"


def _source_for(field_name: str) -> str:
    return "env" if f"{_ENV_PREFIX}{field_name}".upper() in {k.upper() for k in os.environ} else "default"


def settings_rows(settings: LabelDownloadSettings) -> List[Dict[str, object]]:
    """Return one display row per ``section__field`` setting."""

    return [
        {
            "field": name,
            "value": value,
            "source": _source_for(name),
            "type": type(value).__name__,
        }
        for name, value in settings.flattened().items()
    ]


@settings_app.command()
def show(
    format_output: Optional[str] = typer.Option(
        None,
        "--format",
        "-f",
        help="Output format: table or json (defaults to the global --format)",
    ),
) -> None:
    """Display effective configuration with source attribution.

    Example:
        $ labelfetch settings show --format json
    """
    from LabelKit.LabelDownload.cli_main import current_format

    settings = get_default_config()
    rows = settings_rows(settings)
    chosen = (format_output or current_format()).lower()

    if chosen == "json":
        typer.echo(
            json.dumps(
                {"config_hash": settings.config_hash(), "settings": rows}, indent=2, default=str
            )
        )
        return
    if chosen != "table":
        typer.echo(f"Unsupported format: {chosen}", err=True)
        raise typer.Exit(2)

    table = Table(title="LabelDownloadSettings - Effective Configuration")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Source", style="yellow")
    table.add_column("Type", style="magenta")
    for row in rows:
        table.add_row(str(row["field"]), str(row["value"]), str(row["source"]), str(row["type"]))
    Console().print(table)
