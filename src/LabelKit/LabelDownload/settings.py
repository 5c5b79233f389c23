# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.settings",
#   "purpose": "Define configuration models, environment overrides, and the cached default configuration",
#   "sections": [
#     {"id": "tools", "name": "ToolSettings", "anchor": "class-toolsettings", "kind": "class"},
#     {"id": "workspace", "name": "WorkspaceSettings", "anchor": "class-workspacesettings", "kind": "class"},
#     {"id": "resolver", "name": "ResolverSettings", "anchor": "class-resolversettings", "kind": "class"},
#     {"id": "http", "name": "HttpSettings", "anchor": "class-httpsettings", "kind": "class"},
#     {"id": "logging", "name": "LoggingConfiguration", "anchor": "class-loggingconfiguration", "kind": "class"},
#     {"id": "root", "name": "LabelDownloadSettings", "anchor": "class-labeldownloadsettings", "kind": "class"},
#     {"id": "cache", "name": "get_default_config", "anchor": "function-get-default-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration for the label download and container resolution pipeline.

Settings are grouped into small pydantic models (tools, workspace, resolver,
HTTP, logging) composed under :class:`LabelDownloadSettings`, which reads
overrides from ``LABELFETCH_``-prefixed environment variables.  Nested fields
use a double underscore, for example ``LABELFETCH_TOOLS__TIMEOUT_SEC=120``.

The temp root is process-wide configuration: it is read when workspaces are
allocated and is not expected to change after startup.
"""

from __future__ import annotations

import hashlib
import json
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "ToolSettings",
    "WorkspaceSettings",
    "ResolverSettings",
    "HttpSettings",
    "LoggingConfiguration",
    "LabelDownloadSettings",
    "get_default_config",
    "invalidate_default_config_cache",
]

DEFAULT_TEMP_ROOT = Path(tempfile.gettempdir()) / "labelkit"

#: Logical tool names accepted by the subprocess adapter.
TOOL_NAMES = ("unzip", "tar", "hdiutil", "pkgutil", "spctl")


class ToolSettings(BaseModel):
    """Executables used by unwrap steps and inspectors, plus their runtime bound."""

    model_config = ConfigDict(frozen=True)

    unzip: Path = Field(default=Path("/usr/bin/unzip"), description="Zip extractor")
    tar: Path = Field(default=Path("/usr/bin/tar"), description="Tar extractor")
    hdiutil: Path = Field(default=Path("/usr/bin/hdiutil"), description="Disk image utility")
    pkgutil: Path = Field(default=Path("/usr/sbin/pkgutil"), description="Package expander")
    spctl: Path = Field(default=Path("/usr/sbin/spctl"), description="Gatekeeper assessor")
    timeout_sec: float = Field(
        default=900.0,
        gt=0.0,
        le=7200.0,
        description="Upper bound for a single subprocess invocation",
    )

    def executable_for(self, tool: str) -> Optional[Path]:
        """Return the configured executable for logical ``tool`` name."""

        if tool not in TOOL_NAMES:
            return None
        return getattr(self, tool)


class WorkspaceSettings(BaseModel):
    """Where per-resolution scratch directories are allocated."""

    model_config = ConfigDict(frozen=True)

    temp_root: Path = Field(
        default=DEFAULT_TEMP_ROOT,
        description="Directory under which each resolution allocates its workspace",
    )

    @field_validator("temp_root")
    @classmethod
    def expand_temp_root(cls, value: Path) -> Path:
        return Path(value).expanduser()


class ResolverSettings(BaseModel):
    """Knobs for the container resolver."""

    model_config = ConfigDict(frozen=True)

    max_search_depth: int = Field(
        default=32,
        ge=1,
        le=256,
        description="Directory depth bound for the recursive package search inside zips",
    )
    normalize_app_images: bool = Field(
        default=False,
        description="Check application-bearing disk images for a license agreement before attach",
    )


class HttpSettings(BaseModel):
    """HTTPX client settings used by the download coordinator."""

    model_config = ConfigDict(frozen=True)

    timeout_connect: float = Field(default=10.0, gt=0.0, le=120.0)
    timeout_read: float = Field(default=120.0, gt=0.0, le=3600.0)
    user_agent: str = Field(default="LabelKit/labelfetch")
    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Additional attempts after a transport-level failure",
    )
    backoff_factor: float = Field(default=0.5, ge=0.0, le=30.0)
    chunk_size: int = Field(default=1 << 16, ge=1024)
    progress_interval_bytes: int = Field(
        default=1 << 20,
        ge=1,
        description="Minimum number of bytes between progress events",
    )
    fallback_filename: str = Field(default="downloaded.tmp", min_length=1)


class LoggingConfiguration(BaseModel):
    """Logging-related configuration for label downloads."""

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_dir: Optional[Path] = Field(
        default=None, description="Directory for JSON-lines logs; console only when unset"
    )
    max_log_size_mb: int = Field(default=20, gt=0, description="Maximum size of rotated log files")

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        """Normalise logging levels and ensure they match the supported set."""

        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = value.upper()
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return upper

    model_config = {"validate_assignment": True}


class LabelDownloadSettings(BaseSettings):
    """Root settings object with ``LABELFETCH_`` environment overrides."""

    tools: ToolSettings = Field(default_factory=ToolSettings)
    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    model_config = SettingsConfigDict(
        env_prefix="LABELFETCH_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    def config_hash(self) -> str:
        """Return a short stable fingerprint of the effective configuration."""

        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    def flattened(self) -> Dict[str, object]:
        """Return ``section__field`` keyed values for display."""

        flat: Dict[str, object] = {}
        for section, values in self.model_dump(mode="json").items():
            for name, value in values.items():
                flat[f"{section}__{name}"] = value
        return flat


_DEFAULT_CONFIG_LOCK = threading.Lock()
_DEFAULT_CONFIG_CACHE: Optional[LabelDownloadSettings] = None


def get_default_config(*, copy: bool = False) -> LabelDownloadSettings:
    """Return the process-wide settings, loading them from the environment once."""

    global _DEFAULT_CONFIG_CACHE  # noqa: PLW0603

    with _DEFAULT_CONFIG_LOCK:
        if _DEFAULT_CONFIG_CACHE is None:
            _DEFAULT_CONFIG_CACHE = LabelDownloadSettings()
        config = _DEFAULT_CONFIG_CACHE
    return config.model_copy(deep=True) if copy else config


def invalidate_default_config_cache() -> None:
    """Invalidate the cached default configuration."""

    global _DEFAULT_CONFIG_CACHE  # noqa: PLW0603

    with _DEFAULT_CONFIG_LOCK:
        _DEFAULT_CONFIG_CACHE = None
