# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.tools",
#   "purpose": "Narrow adapter for invoking external utilities and the archive extraction commands built on it",
#   "sections": [
#     {"id": "result", "name": "ToolResult", "anchor": "class-toolresult", "kind": "class"},
#     {"id": "adapter", "name": "ToolAdapter", "anchor": "class-tooladapter", "kind": "class"},
#     {"id": "subprocess", "name": "SubprocessToolAdapter", "anchor": "class-subprocesstooladapter", "kind": "class"},
#     {"id": "archives", "name": "Archive Extraction", "anchor": "ARC", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Subprocess tool adapter.

Every external utility the pipeline depends on (``unzip``, ``tar``,
``hdiutil``, ``pkgutil``, ``spctl``) is reached through :class:`ToolAdapter`,
so resolution logic can be exercised in tests with a scripted adapter instead
of real operating-system utilities.  The production adapter runs the
configured executable without a shell, captures both output streams, and
bounds each invocation with a timeout so an unresponsive utility cannot wedge
a resolution indefinitely.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence, Tuple, runtime_checkable

from .errors import ConfigError, ToolExecutionError, ToolTimeoutError
from .settings import LabelDownloadSettings, ToolSettings, get_default_config

LOGGER = logging.getLogger("LabelKit.LabelDownload.tools")

__all__ = [
    "ToolResult",
    "ToolAdapter",
    "SubprocessToolAdapter",
    "extract_zip",
    "extract_tar",
]


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Exit status and captured output of one utility invocation."""

    tool: str
    args: Tuple[str, ...]
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="ignore")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="ignore").strip()

    def check(self) -> "ToolResult":
        """Return ``self`` or raise :class:`ToolExecutionError` on a non-zero exit."""

        if not self.ok:
            raise ToolExecutionError(self.tool, self.exit_code, stderr=self.stderr_text)
        return self


@runtime_checkable
class ToolAdapter(Protocol):
    """Runs a logical tool with positional arguments and reports its outcome."""

    def run(self, tool: str, args: Sequence[str]) -> ToolResult:
        """Run ``tool`` with ``args``; non-zero exits are returned, not raised."""
        ...


class SubprocessToolAdapter:
    """:class:`ToolAdapter` backed by :func:`subprocess.run`.

    Args:
        settings: Tool section of the settings; defaults to the process config.
        timeout: Optional override for the per-invocation timeout in seconds.

    Raises:
        ConfigError: From :meth:`run` when the tool name is not configured.
        ToolTimeoutError: From :meth:`run` when the utility exceeds the timeout.
        ToolExecutionError: From :meth:`run` when the utility cannot be launched.
    """

    def __init__(
        self,
        settings: Optional[ToolSettings] = None,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self._settings = settings or get_default_config().tools
        self._timeout = timeout if timeout is not None else self._settings.timeout_sec

    @classmethod
    def from_settings(cls, settings: LabelDownloadSettings) -> "SubprocessToolAdapter":
        return cls(settings.tools)

    def command_for(self, tool: str, args: Sequence[str]) -> list[str]:
        executable = self._settings.executable_for(tool)
        if executable is None:
            raise ConfigError(f"Unknown tool {tool!r}")
        return [str(executable), *(str(arg) for arg in args)]

    def run(self, tool: str, args: Sequence[str]) -> ToolResult:
        command = self.command_for(tool, args)
        started = time.perf_counter()
        LOGGER.debug(
            "running tool",
            extra={"stage": "tool", "tool": tool, "command": " ".join(command)},
        )
        try:
            completed = subprocess.run(  # noqa: PLW1510 - exit status handled by callers
                command,
                capture_output=True,
                timeout=self._timeout,
                check=False,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired as exc:
            LOGGER.error(
                "tool timed out",
                extra={"stage": "tool", "tool": tool, "timeout_sec": self._timeout},
            )
            raise ToolTimeoutError(tool, self._timeout) from exc
        except OSError as exc:
            raise ToolExecutionError(
                tool, None, message=f"Failed to launch {tool}: {exc}"
            ) from exc

        result = ToolResult(
            tool=tool,
            args=tuple(command[1:]),
            exit_code=completed.returncode,
            stdout=completed.stdout or b"",
            stderr=completed.stderr or b"",
        )
        LOGGER.debug(
            "tool finished",
            extra={
                "stage": "tool",
                "tool": tool,
                "exit_code": result.exit_code,
                "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return result


# --- Archive extraction ------------------------------------------------------


def extract_zip(adapter: ToolAdapter, archive: Path, destination: Path) -> Path:
    """Expand ``archive`` into ``destination`` with ``unzip -q <archive> -d <dest>``."""

    destination.mkdir(parents=True, exist_ok=True)
    LOGGER.info(
        "extracting zip archive",
        extra={"stage": "resolve", "archive": archive.name, "destination": str(destination)},
    )
    adapter.run("unzip", ["-q", str(archive), "-d", str(destination)]).check()
    return destination


def extract_tar(adapter: ToolAdapter, archive: Path, destination: Path) -> Path:
    """Expand ``archive`` into ``destination`` with ``tar -xf <archive> -C <dest>``."""

    destination.mkdir(parents=True, exist_ok=True)
    LOGGER.info(
        "extracting tar archive",
        extra={"stage": "resolve", "archive": archive.name, "destination": str(destination)},
    )
    adapter.run("tar", ["-xf", str(archive), "-C", str(destination)]).check()
    return destination
