"""Tests for the self-updater (cza.updater).

Tests cover:
- Version parsing and platform target triples
- check(): up to date, newer release, digest vs sibling .sha256 checksums,
  missing assets, HTTP failures
- download / verify / swap, including checksum mismatch leaving the
  executable untouched
- replace_executable on the real filesystem
- current_executable: frozen builds, launchers, and refusal to overwrite sources
"""

from __future__ import annotations

import hashlib
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

import cza
from cza.updater import (
    LATEST_RELEASE_URL,
    ChecksumMismatch,
    SelfUpdater,
    SwapFailed,
    UpdateError,
    UpdateManifest,
    UpdateNetworkError,
    UpdateState,
    asset_name_for,
    current_executable,
    parse_version,
    platform_target,
    replace_executable,
)

pytestmark = pytest.mark.unit

TARGET = "x86_64-unknown-linux-gnu"
ASSET = f"cza-{TARGET}"
ASSET_URL = f"https://github.com/sripwoud/cza/releases/download/v0.2.0/{ASSET}"
CHECKSUM_URL = f"{ASSET_URL}.sha256"
NEW_BINARY = b"new binary contents"
NEW_DIGEST = hashlib.sha256(NEW_BINARY).hexdigest()


def _release(tag: str = "v0.2.0", digest: str | None = f"sha256:{NEW_DIGEST}", sibling: bool = False):
    asset = {"name": ASSET, "browser_download_url": ASSET_URL}
    if digest is not None:
        asset["digest"] = digest
    assets = [asset, {"name": "cza-aarch64-apple-darwin", "browser_download_url": "https://x/y"}]
    if sibling:
        assets.append({"name": f"{ASSET}.sha256", "browser_download_url": CHECKSUM_URL})
    return {"tag_name": tag, "assets": assets}


def _client(release: dict | None = None, binary: bytes = NEW_BINARY, status: int = 200, **routes):
    """httpx.Client backed by a MockTransport serving the release API and assets."""

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == LATEST_RELEASE_URL:
            if status != 200:
                return httpx.Response(status, json={"message": "rate limited"})
            return httpx.Response(200, json=release or _release())
        if url == ASSET_URL:
            return httpx.Response(200, content=binary)
        if url in routes:
            return httpx.Response(200, text=routes[url])
        return httpx.Response(404)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _updater(client: httpx.Client, executable: Path, **kwargs) -> SelfUpdater:
    return SelfUpdater(
        client, current_version="0.1.0", executable=executable, target=TARGET, **kwargs
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestParseVersion:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1.2.3", (1, 2, 3)),
            ("v1.2.3", (1, 2, 3)),
            ("0.10.0", (0, 10, 0)),
            ("1.2", (1, 2, 0)),
            ("1.2.3-rc.1", (1, 2, 3)),
        ],
    )
    def test_parse(self, raw: str, expected: tuple[int, ...]):
        assert parse_version(raw) == expected

    def test_numeric_comparison(self):
        assert parse_version("0.10.0") > parse_version("0.9.9")

    def test_garbage(self):
        with pytest.raises(UpdateError):
            parse_version("latest")


class TestPlatformTarget:
    @pytest.mark.parametrize(
        "system,machine,expected",
        [
            ("Linux", "x86_64", "x86_64-unknown-linux-gnu"),
            ("Linux", "aarch64", "aarch64-unknown-linux-gnu"),
            ("Darwin", "arm64", "aarch64-apple-darwin"),
            ("Windows", "AMD64", "x86_64-pc-windows-msvc"),
        ],
    )
    def test_known(self, system: str, machine: str, expected: str):
        assert platform_target(system, machine) == expected

    def test_unsupported(self):
        with pytest.raises(UpdateError, match="No prebuilt release"):
            platform_target("SunOS", "sparc")

    def test_asset_names(self):
        assert asset_name_for("x86_64-unknown-linux-gnu") == "cza-x86_64-unknown-linux-gnu"
        assert asset_name_for("x86_64-pc-windows-msvc") == "cza-x86_64-pc-windows-msvc.exe"


# ---------------------------------------------------------------------------
# check()
# ---------------------------------------------------------------------------


class TestCheck:
    def test_up_to_date(self, fake_executable: Path):
        updater = _updater(_client(_release(tag="v0.1.0")), fake_executable)
        assert updater.check() is None

    def test_older_release_is_up_to_date(self, fake_executable: Path):
        updater = _updater(_client(_release(tag="0.0.9")), fake_executable)
        assert updater.check() is None

    def test_newer_release(self, fake_executable: Path):
        manifest = _updater(_client(), fake_executable).check()
        assert manifest == UpdateManifest(
            current_version="0.1.0",
            latest_version="0.2.0",
            asset_name=ASSET,
            download_url=ASSET_URL,
            checksum=NEW_DIGEST,
        )

    def test_checksum_from_sibling_asset(self, fake_executable: Path):
        client = _client(
            _release(digest=None, sibling=True),
            **{CHECKSUM_URL: f"{NEW_DIGEST.upper()}  {ASSET}\n"},
        )
        manifest = _updater(client, fake_executable).check()
        assert manifest is not None
        assert manifest.checksum == NEW_DIGEST

    def test_missing_checksum(self, fake_executable: Path):
        with pytest.raises(UpdateError, match="No SHA-256"):
            _updater(_client(_release(digest=None)), fake_executable).check()

    def test_missing_platform_asset(self, fake_executable: Path):
        updater = SelfUpdater(
            _client(), current_version="0.1.0", executable=fake_executable, target="riscv64-unknown-linux-gnu"
        )
        with pytest.raises(UpdateError, match="no asset"):
            updater.check()

    def test_http_error(self, fake_executable: Path):
        with pytest.raises(UpdateNetworkError, match="HTTP 403"):
            _updater(_client(status=403), fake_executable).check()

    def test_transport_error(self, fake_executable: Path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route to host", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(UpdateNetworkError) as exc_info:
            _updater(client, fake_executable).check()
        assert "network" in exc_info.value.hint


# ---------------------------------------------------------------------------
# download / verify / swap
# ---------------------------------------------------------------------------


class TestStages:
    def test_download_writes_temp_file(self, fake_executable: Path):
        updater = _updater(_client(), fake_executable)
        path = updater.download(updater.check())
        try:
            assert path.read_bytes() == NEW_BINARY
        finally:
            path.unlink(missing_ok=True)

    def test_download_failure_removes_partial_file(self, fake_executable: Path, tmp_path: Path):
        manifest = UpdateManifest(
            current_version="0.1.0",
            latest_version="0.2.0",
            asset_name=ASSET,
            download_url="https://github.com/missing",
            checksum=NEW_DIGEST,
        )
        created: list[Path] = []
        real_mkstemp = tempfile.mkstemp

        def tracking_mkstemp(*args, **kwargs):
            fd, name = real_mkstemp(*args, dir=tmp_path, **kwargs)
            created.append(Path(name))
            return fd, name

        with patch("cza.updater.tempfile.mkstemp", side_effect=tracking_mkstemp):
            with pytest.raises(UpdateNetworkError, match="HTTP 404"):
                _updater(_client(), fake_executable).download(manifest)
        assert created and not created[0].exists()

    def test_verify_mismatch_deletes_download(self, fake_executable: Path, tmp_path: Path):
        bogus = tmp_path / "download"
        bogus.write_bytes(b"tampered")
        manifest = _updater(_client(), fake_executable).check()
        with pytest.raises(ChecksumMismatch) as exc_info:
            _updater(_client(), fake_executable).verify(bogus, manifest)
        assert exc_info.value.expected == NEW_DIGEST
        assert not bogus.exists()

    def test_swap_wraps_os_errors(self, fake_executable: Path, tmp_path: Path):
        def broken_replace(temp_path: Path, target: Path) -> None:
            raise PermissionError("read-only filesystem")

        new = tmp_path / "new"
        new.write_bytes(NEW_BINARY)
        updater = _updater(_client(), fake_executable, replace=broken_replace)
        with pytest.raises(SwapFailed):
            updater.swap(new)
        assert fake_executable.read_bytes() == b"old binary contents"
        assert not new.exists()


# ---------------------------------------------------------------------------
# run()
# ---------------------------------------------------------------------------


class TestRun:
    def test_up_to_date(self, fake_executable: Path):
        replaced: list[tuple[Path, Path]] = []
        updater = _updater(
            _client(_release(tag="v0.1.0")),
            fake_executable,
            replace=lambda temp, target: replaced.append((temp, target)),
        )
        result = updater.run()
        assert result.state is UpdateState.UP_TO_DATE
        assert result.latest_version == "0.1.0"
        assert replaced == []

    def test_full_update(self, fake_executable: Path):
        result = _updater(_client(), fake_executable).run()
        assert result.state is UpdateState.DONE
        assert (result.current_version, result.latest_version) == ("0.1.0", "0.2.0")
        assert fake_executable.read_bytes() == NEW_BINARY
        assert fake_executable.stat().st_mode & 0o111

    def test_checksum_mismatch_leaves_executable_unchanged(self, fake_executable: Path):
        before = fake_executable.read_bytes()
        replaced: list[Path] = []
        client = _client(binary=b"corrupted in transit")
        updater = _updater(client, fake_executable, replace=lambda temp, target: replaced.append(temp))
        with pytest.raises(ChecksumMismatch):
            updater.run()
        assert fake_executable.read_bytes() == before
        assert replaced == []


# ---------------------------------------------------------------------------
# replace_executable
# ---------------------------------------------------------------------------


class TestReplaceExecutable:
    def test_replaces_and_keeps_mode(self, fake_executable: Path, tmp_path: Path):
        fake_executable.chmod(0o750)
        new = tmp_path / "downloaded"
        new.write_bytes(NEW_BINARY)
        replace_executable(new, fake_executable)
        assert fake_executable.read_bytes() == NEW_BINARY
        assert fake_executable.stat().st_mode & 0o777 == 0o750
        assert [p.name for p in fake_executable.parent.iterdir()] == ["cza"]

    def test_failure_keeps_original(self, fake_executable: Path, tmp_path: Path):
        new = tmp_path / "downloaded"
        new.write_bytes(NEW_BINARY)
        with patch("cza.updater.os.replace", side_effect=OSError("busy")):
            with pytest.raises(SwapFailed, match="busy"):
                replace_executable(new, fake_executable)
        assert fake_executable.read_bytes() == b"old binary contents"
        assert [p.name for p in fake_executable.parent.iterdir()] == ["cza"]


# ---------------------------------------------------------------------------
# current_executable
# ---------------------------------------------------------------------------


PACKAGE_MAIN = Path(cza.__file__).resolve().parent / "__main__.py"


class TestCurrentExecutable:
    def test_frozen_binary(self, monkeypatch: pytest.MonkeyPatch, fake_executable: Path):
        monkeypatch.setattr(sys, "frozen", True, raising=False)
        monkeypatch.setattr(sys, "executable", str(fake_executable))
        assert current_executable() == fake_executable.resolve()

    def test_console_script_launcher(self, monkeypatch: pytest.MonkeyPatch, fake_executable: Path):
        monkeypatch.setattr(sys, "argv", [str(fake_executable), "update"])
        assert current_executable() == fake_executable.resolve()

    def test_refuses_package_main(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(sys, "argv", [str(PACKAGE_MAIN), "update"])
        with pytest.raises(UpdateError) as exc_info:
            current_executable()
        assert "pip" in exc_info.value.hint

    def test_refuses_python_script(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        script = tmp_path / "run_cza.py"
        script.write_text("from cza.cli import main\n", encoding="utf-8")
        monkeypatch.setattr(sys, "argv", [str(script), "update"])
        with pytest.raises(UpdateError, match="Python sources"):
            current_executable()

    def test_module_run_never_overwrites_sources(self, monkeypatch: pytest.MonkeyPatch):
        before = PACKAGE_MAIN.read_bytes()
        monkeypatch.setattr(sys, "argv", [str(PACKAGE_MAIN), "update"])
        updater = SelfUpdater(_client(), current_version="0.1.0", target=TARGET)
        with pytest.raises(UpdateError, match="Python sources"):
            updater.run()
        assert PACKAGE_MAIN.read_bytes() == before

    def test_check_does_not_need_executable(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(sys, "argv", [str(PACKAGE_MAIN), "update"])
        updater = SelfUpdater(_client(), current_version="0.1.0", target=TARGET)
        assert updater.check() is not None
