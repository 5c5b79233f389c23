"""Testing utilities for exercising label resolution without macOS utilities.

Provides a scripted :class:`RecordingToolAdapter` that simulates ``unzip``,
``tar``, ``hdiutil``, ``pkgutil``, and ``spctl`` against real files in a
temporary directory while logging every invocation, plus a helper for
temporarily installing an HTTPX mock transport as the shared client.
"""

from __future__ import annotations

import contextlib
import plistlib
import shutil
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import httpx

from ..tools import ToolResult

__all__ = [
    "ToolCall",
    "RecordingToolAdapter",
    "DEFAULT_SPCTL_OUTPUT",
    "use_mock_http_client",
    "write_app_bundle",
    "write_zip",
]

DEFAULT_SPCTL_OUTPUT = (
    "accepted\n"
    "source=Notarized Developer ID\n"
    "origin=Developer ID Application: Example Corp (EXAMPLE123)\n"
)

ToolHandler = Callable[[Tuple[str, ...]], ToolResult]


@contextlib.contextmanager
def use_mock_http_client(transport: "httpx.BaseTransport", **client_kwargs):
    """Temporarily install an HTTPX client backed by ``transport``."""

    from ..net import configure_http_client, reset_http_client

    client_kwargs.setdefault("follow_redirects", True)
    client = httpx.Client(transport=transport, **client_kwargs)
    configure_http_client(client=client)
    try:
        yield client
    finally:
        reset_http_client()
        client.close()


@dataclass(frozen=True)
class ToolCall:
    """One recorded adapter invocation."""

    tool: str
    args: Tuple[str, ...]

    @property
    def verb(self) -> str:
        """First argument, e.g. ``attach`` for ``hdiutil attach``."""
        return self.args[0] if self.args else ""


class RecordingToolAdapter:
    """Scripted :class:`~LabelKit.LabelDownload.tools.ToolAdapter` for tests.

    Disk images are simulated by registering a directory whose contents appear
    at the mount point on attach.  Packages are simulated by registering the
    ``Distribution`` or ``PackageInfo`` text their expansion should produce.
    Any tool (or ``"hdiutil attach"``-style tool and verb pair) can be given a
    custom handler, which takes precedence over the simulation.

    Examples:
        >>> adapter = RecordingToolAdapter()
        >>> adapter.fail("unzip", exit_code=1)
        >>> adapter.run("unzip", ["-q", "a.zip", "-d", "out"]).exit_code
        1
    """

    def __init__(self) -> None:
        self.calls: List[ToolCall] = []
        self.mounts: Dict[Path, str] = {}
        self.converted: List[str] = []
        self._images: Dict[str, Path] = {}
        self._sla_images: set = set()
        self._packages: Dict[str, Dict[str, str]] = {}
        self._spctl_output: Dict[str, str] = {}
        self._handlers: Dict[str, ToolHandler] = {}

    # --- scripting -------------------------------------------------------

    def register_image(self, name: str, contents: Path, *, license_agreement: bool = False) -> None:
        """Make attaching an image called ``name`` expose a copy of ``contents``."""

        self._images[name] = Path(contents)
        if license_agreement:
            self._sla_images.add(name)

    def register_package(
        self,
        name: str,
        *,
        distribution: Optional[str] = None,
        package_info: Optional[str] = None,
    ) -> None:
        files: Dict[str, str] = {}
        if distribution is not None:
            files["Distribution"] = distribution
        if package_info is not None:
            files["PackageInfo"] = package_info
        self._packages[name] = files

    def set_spctl_output(self, name: str, output: str) -> None:
        self._spctl_output[name] = output

    def on(self, key: str, handler: ToolHandler) -> None:
        """Install ``handler`` for ``key`` (``"tool"`` or ``"tool verb"``)."""

        self._handlers[key] = handler

    def fail(self, key: str, *, exit_code: int = 1, stderr: str = "") -> None:
        tool = key.split()[0]
        self.on(
            key,
            lambda args: ToolResult(tool, args, exit_code, b"", stderr.encode("utf-8")),
        )

    # --- inspection ------------------------------------------------------

    def calls_for(self, tool: str, verb: Optional[str] = None) -> List[ToolCall]:
        return [
            call
            for call in self.calls
            if call.tool == tool and (verb is None or call.verb == verb)
        ]

    @property
    def sequence(self) -> List[str]:
        """``"tool verb"`` strings in invocation order."""

        return [f"{call.tool} {call.verb}".strip() for call in self.calls]

    # --- ToolAdapter -----------------------------------------------------

    def run(self, tool: str, args: Sequence[str]) -> ToolResult:
        argv = tuple(str(arg) for arg in args)
        call = ToolCall(tool, argv)
        self.calls.append(call)
        handler = self._handlers.get(f"{tool} {call.verb}") or self._handlers.get(tool)
        if handler is not None:
            return handler(argv)
        simulate = getattr(self, f"_simulate_{tool}", None)
        if simulate is None:
            return self._result(tool, argv, 127, stderr=f"{tool}: command not simulated")
        return simulate(argv)

    # --- simulations -----------------------------------------------------

    @staticmethod
    def _result(
        tool: str, args: Tuple[str, ...], exit_code: int = 0, *, stdout: bytes = b"", stderr: str = ""
    ) -> ToolResult:
        return ToolResult(tool, args, exit_code, stdout, stderr.encode("utf-8"))

    def _simulate_unzip(self, args: Tuple[str, ...]) -> ToolResult:
        archive, destination = Path(args[1]), Path(args[3])
        try:
            with zipfile.ZipFile(archive) as bundle:
                bundle.extractall(destination)
        except (OSError, zipfile.BadZipFile) as exc:
            return self._result("unzip", args, 9, stderr=str(exc))
        return self._result("unzip", args)

    def _simulate_tar(self, args: Tuple[str, ...]) -> ToolResult:
        archive, destination = Path(args[1]), Path(args[3])
        try:
            with tarfile.open(archive) as bundle:
                if hasattr(tarfile, "data_filter"):
                    bundle.extractall(destination, filter="data")
                else:  # pragma: no cover - interpreters without extraction filters
                    bundle.extractall(destination)
        except (OSError, tarfile.TarError) as exc:
            return self._result("tar", args, 1, stderr=str(exc))
        return self._result("tar", args)

    def _simulate_hdiutil(self, args: Tuple[str, ...]) -> ToolResult:
        verb = args[0] if args else ""
        if verb == "attach":
            image, mount_point = Path(args[1]), Path(args[3])
            contents = self._images.get(image.name)
            if contents is None or not image.exists():
                return self._result("hdiutil", args, 1, stderr="hdiutil: attach failed - no mountable file systems")
            if mount_point in self.mounts:
                return self._result("hdiutil", args, 16, stderr="hdiutil: attach failed - resource busy")
            shutil.copytree(contents, mount_point, symlinks=True, dirs_exist_ok=True)
            self.mounts[mount_point] = image.name
            return self._result("hdiutil", args)
        if verb == "detach":
            mount_point = Path(args[1])
            if self.mounts.pop(mount_point, None) is None:
                return self._result("hdiutil", args, 1, stderr="hdiutil: detach failed - No such file or directory")
            shutil.rmtree(mount_point, ignore_errors=True)
            return self._result("hdiutil", args)
        if verb == "imageinfo":
            image = Path(args[1])
            payload = {
                "Format": "UDZO",
                "Properties": {"Software License Agreement": image.name in self._sla_images},
            }
            return self._result("hdiutil", args, stdout=plistlib.dumps(payload))
        if verb == "convert":
            output, image = Path(args[4]), Path(args[5])
            shutil.copy2(image, output)
            self._sla_images.discard(image.name)
            self.converted.append(image.name)
            return self._result("hdiutil", args)
        return self._result("hdiutil", args, 1, stderr=f"hdiutil: unknown verb {verb}")

    def _simulate_pkgutil(self, args: Tuple[str, ...]) -> ToolResult:
        package, destination = Path(args[1]), Path(args[2])
        files = self._packages.get(package.name)
        if files is None:
            return self._result("pkgutil", args, 1, stderr="Error: could not expand package")
        destination.mkdir(parents=True)
        for name, text in files.items():
            (destination / name).write_text(text, encoding="utf-8")
        return self._result("pkgutil", args)

    def _simulate_spctl(self, args: Tuple[str, ...]) -> ToolResult:
        target = Path(args[-1])
        output = self._spctl_output.get(target.name, DEFAULT_SPCTL_OUTPUT)
        exit_code = 0 if "accepted" in output else 3
        return self._result("spctl", args, exit_code, stderr=output)


def write_app_bundle(
    root: Path,
    name: str,
    *,
    identifier: str,
    version: str,
    minimum_os: Optional[str] = None,
) -> Path:
    """Create a minimal ``<name>.app`` bundle with an ``Info.plist`` under ``root``."""

    bundle = root / name
    contents = bundle / "Contents"
    (contents / "MacOS").mkdir(parents=True)
    info: Dict[str, str] = {
        "CFBundleIdentifier": identifier,
        "CFBundleShortVersionString": version,
    }
    if minimum_os is not None:
        info["LSMinimumSystemVersion"] = minimum_os
    with (contents / "Info.plist").open("wb") as handle:
        plistlib.dump(info, handle)
    return bundle


def write_zip(archive: Path, files: Mapping[str, bytes], *, directories: Iterable[str] = ()) -> Path:
    """Write ``files`` (archive name to bytes) and empty ``directories`` into ``archive``."""

    with zipfile.ZipFile(archive, "w") as bundle:
        for directory in directories:
            bundle.writestr(directory.rstrip("/") + "/", b"")
        for name, data in files.items():
            bundle.writestr(name, data)
    return archive


