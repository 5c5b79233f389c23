"""Declared container types and value objects."""

from __future__ import annotations

import pytest

from LabelKit.LabelDownload.errors import ConfigError, MissingArtifactError
from LabelKit.LabelDownload.models import (
    ArtifactKind,
    DeclaredType,
    FinalizeMode,
    IdentityCandidate,
    SignatureVerdict,
    TerminalArtifact,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("pkg", DeclaredType.PACKAGE),
        ("pkgInZip", DeclaredType.PACKAGE_IN_ZIP),
        ("PKGINDMG", DeclaredType.PACKAGE_IN_IMAGE),
        ("pkgInDmgInZip", DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP),
        ("dmg", DeclaredType.DISK_IMAGE),
        ("zip", DeclaredType.ZIP),
        ("tbz", DeclaredType.COMPRESSED_TAR),
        ("appInDmgInZip", DeclaredType.APP_IN_IMAGE_IN_ZIP),
        ("compressedTar", DeclaredType.COMPRESSED_TAR),
        (" diskImage ", DeclaredType.DISK_IMAGE),
    ],
)
def test_label_types_and_canonical_names_parse(value, expected):
    assert DeclaredType.parse(value) is expected


def test_unknown_type_is_a_config_error():
    with pytest.raises(ConfigError, match="Unsupported type: bz2"):
        DeclaredType.parse("bz2")


def test_terminal_kinds_partition_declared_types():
    packages = {d for d in DeclaredType if d.terminal_kind is ArtifactKind.PACKAGE}

    assert packages == {
        DeclaredType.PACKAGE,
        DeclaredType.PACKAGE_IN_ZIP,
        DeclaredType.PACKAGE_IN_IMAGE,
        DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP,
    }
    assert DeclaredType.ZIP.aliases == ()
    assert DeclaredType.DISK_IMAGE.aliases == ("dmg",)


def test_finalize_mode_accepts_strings():
    assert FinalizeMode("commit") is FinalizeMode.COMMIT
    with pytest.raises(ValueError):
        FinalizeMode("abort")


def test_value_objects(tmp_path):
    candidate = IdentityCandidate("com.example.app", "1.0")
    verdict = SignatureVerdict.unknown()

    assert candidate.label == "com.example.app - 1.0"
    assert verdict.accepted is False
    assert verdict.developer_id == verdict.developer_team == "Unknown"
    assert TerminalArtifact(ArtifactKind.PACKAGE, tmp_path, signature=verdict) == TerminalArtifact(
        ArtifactKind.PACKAGE, tmp_path
    )


def test_missing_artifact_error_names_expected_kind(tmp_path):
    error = MissingArtifactError("package", tmp_path.name)

    assert error.expected_kind == "package"
    assert str(error) == f"No package found in {tmp_path.name}"
