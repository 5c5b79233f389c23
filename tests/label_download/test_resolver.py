# === NAVMAP v1 ===
# {
#   "module": "tests.label_download.test_resolver",
#   "purpose": "Container resolution across every declared type, failure paths, and mount hygiene.",
#   "sections": [
#     {"id": "helpers", "name": "Helpers", "anchor": "HLP", "kind": "helpers"},
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Container resolution across every declared type, failure paths, and mount hygiene."""

from __future__ import annotations

import tarfile
from pathlib import Path

import pytest

from LabelKit.LabelDownload.cancellation import CancellationToken
from LabelKit.LabelDownload.errors import (
    MissingArtifactError,
    MountError,
    ResolutionCancelled,
    ToolExecutionError,
)
from LabelKit.LabelDownload.inspection import SpctlSignatureInspector
from LabelKit.LabelDownload.models import (
    ArtifactKind,
    DeclaredType,
    FinalizeMode,
    ResolutionRequest,
    ResolutionState,
)
from LabelKit.LabelDownload.resolver import (
    ContainerResolver,
    ResolutionTrace,
    find_first_recursive,
    find_first_top_level,
)
from LabelKit.LabelDownload.settings import LabelDownloadSettings
from LabelKit.LabelDownload.testing import write_app_bundle, write_zip


def _resolver(manager, adapter, settings, **kwargs) -> ContainerResolver:
    return ContainerResolver(manager, adapter, settings, **kwargs)


def _request(declared: DeclaredType, source: Path, workspace) -> ResolutionRequest:
    return ResolutionRequest(declared_type=declared, source=source, workspace=workspace)


# --- Plain package ---------------------------------------------------------------


def test_package_is_returned_unchanged_without_tool_calls(manager, adapter, settings, workspace):
    source = workspace.root / "Tool.pkg"
    source.write_bytes(b"xar!")

    artifact = _resolver(manager, adapter, settings).resolve(
        _request(DeclaredType.PACKAGE, source, workspace)
    )

    assert artifact.kind is ArtifactKind.PACKAGE
    assert artifact.path == source
    assert adapter.calls == []


def test_missing_download_raises_missing_artifact(manager, adapter, settings, workspace):
    with pytest.raises(MissingArtifactError) as excinfo:
        _resolver(manager, adapter, settings).resolve(
            _request(DeclaredType.PACKAGE, workspace.root / "absent.pkg", workspace)
        )
    assert excinfo.value.expected_kind == "package"


# --- Zip archives ----------------------------------------------------------------


def test_package_in_zip_is_found_at_any_depth(manager, adapter, settings, workspace):
    archive = write_zip(
        workspace.root / "bundle.zip",
        {"a/b/c/installer.pkg": b"xar!", "a/readme.txt": b"hello"},
    )

    artifact = _resolver(manager, adapter, settings).resolve(
        _request(DeclaredType.PACKAGE_IN_ZIP, archive, workspace)
    )

    assert artifact.kind is ArtifactKind.PACKAGE
    assert artifact.path.name == "installer.pkg"
    assert artifact.path.relative_to(workspace.root).parts[-4:] == ("a", "b", "c", "installer.pkg")
    assert adapter.sequence == ["unzip -q"]
    unzip_args = adapter.calls[0].args
    assert unzip_args[:2] == ("-q", str(archive))
    assert unzip_args[2] == "-d"


def test_package_in_zip_without_package_raises(manager, adapter, settings, workspace):
    archive = write_zip(workspace.root / "bundle.zip", {"docs/readme.txt": b"hello"})

    with pytest.raises(MissingArtifactError) as excinfo:
        _resolver(manager, adapter, settings).resolve(
            _request(DeclaredType.PACKAGE_IN_ZIP, archive, workspace)
        )
    assert excinfo.value.expected_kind == "package"


def test_unzip_failure_surfaces_tool_error_and_finalize_cleans_up(
    manager, adapter, settings, workspace
):
    archive = write_zip(workspace.root / "bundle.zip", {"installer.pkg": b"xar!"})
    adapter.fail("unzip", exit_code=1, stderr="End-of-central-directory signature not found")

    with pytest.raises(ToolExecutionError) as excinfo:
        _resolver(manager, adapter, settings).resolve(
            _request(DeclaredType.PACKAGE_IN_ZIP, archive, workspace)
        )

    assert excinfo.value.tool == "unzip"
    assert excinfo.value.exit_code == 1
    assert "End-of-central-directory" in str(excinfo.value)

    manager.finalize(workspace, FinalizeMode.CANCEL)
    assert not workspace.root.exists()


def test_zip_yields_top_level_app_bundle(manager, adapter, settings, workspace):
    archive = write_zip(
        workspace.root / "Example.zip",
        {"Example.app/Contents/Info.plist": b"<plist/>", "Extras/Other.app/Contents/Info.plist": b""},
    )

    artifact = _resolver(manager, adapter, settings).resolve(
        _request(DeclaredType.ZIP, archive, workspace)
    )

    assert artifact.kind is ArtifactKind.APP_BUNDLE
    assert artifact.path.name == "Example.app"
    assert artifact.path.is_dir()


def test_compressed_tar_yields_top_level_app_bundle(
    manager, adapter, settings, workspace, tmp_path
):
    staging = tmp_path / "staging"
    staging.mkdir()
    write_app_bundle(staging, "Example.app", identifier="com.example.app", version="2.0")
    archive = workspace.root / "Example.tbz"
    with tarfile.open(archive, "w:bz2") as bundle:
        bundle.add(staging / "Example.app", arcname="Example.app")

    artifact = _resolver(manager, adapter, settings).resolve(
        _request(DeclaredType.COMPRESSED_TAR, archive, workspace)
    )

    assert artifact.kind is ArtifactKind.APP_BUNDLE
    assert (artifact.path / "Contents" / "Info.plist").is_file()
    tar_args = adapter.calls_for("tar")[0].args
    assert tar_args[0] == "-xf" and tar_args[1] == str(archive) and tar_args[2] == "-C"


# --- Disk images -----------------------------------------------------------------


def test_package_in_image_with_license_converts_before_attach(
    manager, adapter, settings, workspace, image_tree
):
    contents = image_tree()
    (contents / "Tool.pkg").write_bytes(b"xar!")
    image = workspace.root / "Tool.dmg"
    image.write_bytes(b"image-bytes")
    adapter.register_image("Tool.dmg", contents, license_agreement=True)

    artifact = _resolver(manager, adapter, settings).resolve(
        _request(DeclaredType.PACKAGE_IN_IMAGE, image, workspace)
    )

    assert adapter.sequence == [
        "hdiutil imageinfo",
        "hdiutil convert",
        "hdiutil attach",
        "hdiutil detach",
    ]
    assert adapter.converted == ["Tool.dmg"]
    assert image.exists()
    assert artifact.kind is ArtifactKind.PACKAGE
    assert artifact.path.read_bytes() == b"xar!"
    assert not artifact.path.is_relative_to(workspace.mount_point)
    assert adapter.mounts == {}
    assert workspace.active_mount_point is None


def test_package_in_image_without_license_skips_conversion(
    manager, adapter, settings, workspace, image_tree
):
    contents = image_tree()
    (contents / "Tool.pkg").write_bytes(b"xar!")
    image = workspace.root / "Tool.dmg"
    image.write_bytes(b"image-bytes")
    adapter.register_image("Tool.dmg", contents)

    _resolver(manager, adapter, settings).resolve(
        _request(DeclaredType.PACKAGE_IN_IMAGE, image, workspace)
    )

    assert adapter.calls_for("hdiutil", "convert") == []
    attach = adapter.calls_for("hdiutil", "attach")[0]
    assert attach.args == (
        "attach",
        str(image),
        "-mountpoint",
        str(workspace.mount_point),
        "-nobrowse",
        "-quiet",
    )
    detach = adapter.calls_for("hdiutil", "detach")[0]
    assert detach.args == ("detach", str(workspace.mount_point), "-quiet", "-force")


def test_disk_image_without_app_detaches_and_reports_app_bundle(
    manager, adapter, settings, workspace, image_tree
):
    contents = image_tree()
    (contents / "README.txt").write_text("nothing to see")
    image = workspace.root / "Empty.dmg"
    image.write_bytes(b"image-bytes")
    adapter.register_image("Empty.dmg", contents)

    with pytest.raises(MissingArtifactError) as excinfo:
        _resolver(manager, adapter, settings).resolve(
            _request(DeclaredType.DISK_IMAGE, image, workspace)
        )

    assert excinfo.value.expected_kind == "appBundle"
    assert adapter.sequence[-1] == "hdiutil detach"
    assert workspace.active_mount_point is None
    assert adapter.mounts == {}


def test_disk_image_assesses_signature_in_place_then_copies_out(
    manager, adapter, settings, workspace, image_tree
):
    contents = image_tree()
    write_app_bundle(contents, "Example.app", identifier="com.example.app", version="3.1")
    (contents / "Applications").symlink_to("/Applications")
    image = workspace.root / "Example.dmg"
    image.write_bytes(b"image-bytes")
    adapter.register_image("Example.dmg", contents)

    resolver = _resolver(
        manager, adapter, settings, signature_inspector=SpctlSignatureInspector(adapter)
    )
    artifact = resolver.resolve(_request(DeclaredType.DISK_IMAGE, image, workspace))

    sequence = adapter.sequence
    assert sequence.index("spctl -a") < sequence.index("hdiutil detach")
    spctl_call = adapter.calls_for("spctl")[0]
    assert spctl_call.args[:4] == ("-a", "-vv", "-t", "execute")
    assert Path(spctl_call.args[4]).parent == workspace.mount_point
    assert artifact.signature is not None
    assert artifact.signature.accepted is True
    assert artifact.signature.developer_team == "EXAMPLE123"
    assert (artifact.path / "Contents" / "Info.plist").is_file()


def test_disk_image_skips_license_check_by_default(
    manager, adapter, settings, workspace, image_tree
):
    contents = image_tree()
    write_app_bundle(contents, "Example.app", identifier="com.example.app", version="1.0")
    image = workspace.root / "Example.dmg"
    image.write_bytes(b"image-bytes")
    adapter.register_image("Example.dmg", contents, license_agreement=True)

    _resolver(manager, adapter, settings).resolve(_request(DeclaredType.DISK_IMAGE, image, workspace))

    assert adapter.calls_for("hdiutil", "imageinfo") == []
    assert adapter.sequence == ["hdiutil attach", "hdiutil detach"]


def test_disk_image_license_check_can_be_enabled(
    manager, adapter, temp_root, workspace, image_tree
):
    settings = LabelDownloadSettings(
        workspace={"temp_root": temp_root}, resolver={"normalize_app_images": True}
    )
    contents = image_tree()
    write_app_bundle(contents, "Example.app", identifier="com.example.app", version="1.0")
    image = workspace.root / "Example.dmg"
    image.write_bytes(b"image-bytes")
    adapter.register_image("Example.dmg", contents, license_agreement=True)

    _resolver(manager, adapter, settings).resolve(_request(DeclaredType.DISK_IMAGE, image, workspace))

    assert adapter.sequence == [
        "hdiutil imageinfo",
        "hdiutil convert",
        "hdiutil attach",
        "hdiutil detach",
    ]


def test_attach_failure_raises_mount_error(manager, adapter, settings, workspace, image_tree):
    image = workspace.root / "Broken.dmg"
    image.write_bytes(b"not an image")
    adapter.fail("hdiutil attach", exit_code=1, stderr="no mountable file systems")

    with pytest.raises(MountError) as excinfo:
        _resolver(manager, adapter, settings).resolve(
            _request(DeclaredType.DISK_IMAGE, image, workspace)
        )

    assert excinfo.value.exit_code == 1
    assert workspace.active_mount_point is None
    assert adapter.calls_for("hdiutil", "detach") == []


# --- Composite types -------------------------------------------------------------


def test_app_in_image_in_zip_descends_one_level(
    manager, adapter, settings, workspace, image_tree
):
    contents = image_tree()
    write_app_bundle(contents, "Example.app", identifier="com.example.app", version="4.0")
    archive = write_zip(workspace.root / "Example.zip", {"Example.dmg": b"image-bytes"})
    adapter.register_image("Example.dmg", contents)
    trace = ResolutionTrace()

    artifact = _resolver(manager, adapter, settings).resolve(
        _request(DeclaredType.APP_IN_IMAGE_IN_ZIP, archive, workspace), trace=trace
    )

    assert artifact.kind is ArtifactKind.APP_BUNDLE
    assert trace.transitions == [
        (ResolutionState.IDLE, 0),
        (ResolutionState.UNWRAPPING, 0),
        (ResolutionState.UNWRAPPING, 1),
        (ResolutionState.TERMINAL, 1),
    ]
    assert adapter.sequence[0] == "unzip -q"
    assert adapter.sequence[-1] == "hdiutil detach"


def test_package_in_image_in_zip_requires_disk_image(manager, adapter, settings, workspace):
    archive = write_zip(workspace.root / "Tool.zip", {"Tool.pkg": b"xar!"})
    trace = ResolutionTrace()

    with pytest.raises(MissingArtifactError) as excinfo:
        _resolver(manager, adapter, settings).resolve(
            _request(DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP, archive, workspace), trace=trace
        )

    assert excinfo.value.expected_kind == "diskImage"
    assert trace.state is ResolutionState.FAILED


def test_package_in_image_in_zip_resolves_package(
    manager, adapter, settings, workspace, image_tree
):
    contents = image_tree()
    (contents / "Tool.pkg").write_bytes(b"xar!")
    archive = write_zip(workspace.root / "Tool.zip", {"Tool.dmg": b"image-bytes"})
    adapter.register_image("Tool.dmg", contents)

    artifact = _resolver(manager, adapter, settings).resolve(
        _request(DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP, archive, workspace)
    )

    assert artifact.kind is ArtifactKind.PACKAGE
    assert artifact.path.exists()
    assert adapter.mounts == {}


# --- Cancellation & trace --------------------------------------------------------


def test_cancelled_token_stops_before_first_step(manager, adapter, settings, workspace):
    archive = write_zip(workspace.root / "bundle.zip", {"installer.pkg": b"xar!"})
    token = CancellationToken()
    token.cancel()

    with pytest.raises(ResolutionCancelled):
        _resolver(manager, adapter, settings).resolve(
            _request(DeclaredType.PACKAGE_IN_ZIP, archive, workspace), cancel_token=token
        )
    assert adapter.calls == []


def test_trace_rejects_illegal_transitions():
    trace = ResolutionTrace()
    with pytest.raises(RuntimeError):
        trace.advance(ResolutionState.TERMINAL)

    trace.advance(ResolutionState.UNWRAPPING, 0)
    with pytest.raises(RuntimeError):
        trace.advance(ResolutionState.UNWRAPPING, 2)


# --- Locate helpers --------------------------------------------------------------


def test_recursive_search_respects_depth_bound(tmp_path):
    nested = tmp_path / "a" / "b" / "c"
    nested.mkdir(parents=True)
    (nested / "installer.pkg").write_bytes(b"xar!")

    assert find_first_recursive(tmp_path, ".pkg", max_depth=3) is None
    assert find_first_recursive(tmp_path, ".pkg", max_depth=4) == nested / "installer.pkg"


def test_recursive_search_skips_hidden_and_visits_in_name_order(tmp_path):
    (tmp_path / ".hidden").mkdir()
    (tmp_path / ".hidden" / "decoy.pkg").write_bytes(b"")
    (tmp_path / "b.pkg").write_bytes(b"")
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "inner.pkg").write_bytes(b"")

    assert find_first_recursive(tmp_path, ".pkg", max_depth=8) == tmp_path / "a" / "inner.pkg"


def test_recursive_search_does_not_follow_symlinked_directories(tmp_path):
    target = tmp_path / "elsewhere"
    target.mkdir()
    (target / "linked.pkg").write_bytes(b"")
    root = tmp_path / "root"
    root.mkdir()
    (root / "link").symlink_to(target, target_is_directory=True)

    assert find_first_recursive(root, ".pkg", max_depth=8) is None


def test_top_level_search_matches_suffix_case_insensitively(tmp_path):
    (tmp_path / "Example.APP").mkdir()
    (tmp_path / "notes.app").write_text("a file, not a bundle")

    assert find_first_top_level(tmp_path, ".app", directories_only=True) == tmp_path / "Example.APP"
