"""Shared fixtures for label_download test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from LabelKit.LabelDownload import net as net_mod
from LabelKit.LabelDownload.models import Workspace
from LabelKit.LabelDownload.settings import LabelDownloadSettings, invalidate_default_config_cache
from LabelKit.LabelDownload.testing import RecordingToolAdapter
from LabelKit.LabelDownload.workspace import WorkspaceManager


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch):
    """Drop ``LABELFETCH_`` overrides and shared clients between tests."""

    for key in list(os.environ):
        if key.upper().startswith("LABELFETCH_"):
            monkeypatch.delenv(key, raising=False)
    invalidate_default_config_cache()
    net_mod.reset_http_client()
    yield
    invalidate_default_config_cache()
    net_mod.reset_http_client()


@pytest.fixture
def temp_root(tmp_path: Path) -> Path:
    return tmp_path / "labelkit"


@pytest.fixture
def settings(temp_root: Path) -> LabelDownloadSettings:
    return LabelDownloadSettings(
        workspace={"temp_root": temp_root},
        http={
            "max_retries": 0,
            "backoff_factor": 0.0,
            "chunk_size": 1024,
            "progress_interval_bytes": 1024,
        },
    )


@pytest.fixture
def adapter() -> RecordingToolAdapter:
    return RecordingToolAdapter()


@pytest.fixture
def manager(adapter: RecordingToolAdapter, settings: LabelDownloadSettings) -> WorkspaceManager:
    return WorkspaceManager(adapter, settings)


@pytest.fixture
def workspace(manager: WorkspaceManager) -> Workspace:
    return manager.allocate()


@pytest.fixture
def image_tree(tmp_path: Path):
    """Factory for directories standing in for disk image contents."""

    def _make(name: str = "image") -> Path:
        root = tmp_path / "images" / name
        root.mkdir(parents=True)
        return root

    return _make
