"""Self-update for the installed ``cza`` executable.

Flow::

    CheckForUpdate -> UpToDate
                   -> UpdateAvailable -> Download -> VerifyChecksum -> Swap -> Done

Releases are published on GitHub as one binary per target triple
(``cza-x86_64-unknown-linux-gnu``, ``cza-aarch64-apple-darwin``, ...).  A
failure at any stage leaves the current executable exactly as it was.

Typical usage::

    with httpx.Client() as client:
        result = SelfUpdater(client).run()
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import platform
import shutil
import sys
import tempfile
from collections.abc import Callable, Iterator
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from cza import __version__
from cza.errors import CzaError

logger = logging.getLogger(__name__)

RELEASE_REPOSITORY = "sripwoud/cza"
LATEST_RELEASE_URL = f"https://api.github.com/repos/{RELEASE_REPOSITORY}/releases/latest"
BINARY_NAME = "cza"
REQUEST_TIMEOUT = 30.0
_CHUNK_SIZE = 64 * 1024

_ARCH_ALIASES: dict[str, str] = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}

_SYSTEM_SUFFIXES: dict[str, str] = {
    "linux": "unknown-linux-gnu",
    "darwin": "apple-darwin",
    "windows": "pc-windows-msvc",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class UpdateError(CzaError):
    """Base class for self-update failures."""


class UpdateNetworkError(UpdateError):
    """The release API or the asset download failed."""


class ChecksumMismatch(UpdateError):
    """The downloaded file does not match the published SHA-256."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch: expected {expected}, got {actual}",
            hint="The executable was not modified. Try again later.",
        )


class SwapFailed(UpdateError):
    """The new executable could not be moved into place."""


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class UpdateState(str, Enum):
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    DONE = "done"


class UpdateManifest(BaseModel):
    """Everything needed to fetch and verify one release asset."""

    model_config = ConfigDict(frozen=True)

    current_version: str
    latest_version: str
    asset_name: str = Field(..., description="e.g. cza-x86_64-unknown-linux-gnu")
    download_url: str
    checksum: str = Field(..., description="Lower-case hex SHA-256 of the asset")


class UpdateResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: UpdateState
    current_version: str
    latest_version: str


# ---------------------------------------------------------------------------
# Platform helpers
# ---------------------------------------------------------------------------


def parse_version(raw: str) -> tuple[int, ...]:
    """Parse ``v1.2.3`` / ``1.2.3`` into ``(1, 2, 3)``.

    Pre-release and build suffixes (``1.2.3-rc.1``) are ignored.

    Raises:
        UpdateError: If the string is not a dotted numeric version.
    """
    core = raw.strip().lstrip("v").split("-", 1)[0].split("+", 1)[0]
    try:
        parts = tuple(int(x) for x in core.split(".")[:3])
    except ValueError:
        raise UpdateError(f"Unrecognised version '{raw}'") from None
    return parts + (0,) * (3 - len(parts))


def platform_target(system: str | None = None, machine: str | None = None) -> str:
    """Return the Rust-style target triple of the running platform."""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    arch = _ARCH_ALIASES.get(machine)
    suffix = _SYSTEM_SUFFIXES.get(system)
    if arch is None or suffix is None:
        raise UpdateError(
            f"No prebuilt release for {system}/{machine}",
            hint="Install from source instead.",
        )
    return f"{arch}-{suffix}"


def asset_name_for(target: str) -> str:
    name = f"{BINARY_NAME}-{target}"
    return f"{name}.exe" if "windows" in target else name


_PACKAGE_DIR = Path(__file__).resolve().parent


def current_executable() -> Path:
    """Path of the file ``update`` replaces.

    A frozen build replaces its own binary; a pip install replaces the
    console-script launcher that started this process.

    Raises:
        UpdateError: cza is running from Python sources (``python -m cza``
            or a ``.py`` script), which must never be overwritten.
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve()
    launcher = Path(sys.argv[0])
    if not launcher.exists():
        found = shutil.which(sys.argv[0])
        if found:
            launcher = Path(found)
    launcher = launcher.resolve()
    if launcher.suffix == ".py" or _PACKAGE_DIR in launcher.parents:
        raise UpdateError(
            f"cza is running from Python sources ({launcher}); refusing to replace them",
            hint="Upgrade with 'pip install --upgrade cza' instead.",
        )
    return launcher


def replace_executable(temp_path: Path, target: Path) -> None:
    """Atomically move *temp_path* over *target*, keeping *target*'s mode bits.

    The new file is first copied next to *target* so the final rename never
    crosses filesystems.  On Windows a running executable cannot be
    overwritten, so it is renamed to ``<name>.old`` first and restored if the
    rename fails.

    Raises:
        SwapFailed: The original *target* is intact.
    """
    target = Path(target)
    fd, sibling_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".new")
    os.close(fd)
    sibling = Path(sibling_name)
    try:
        shutil.copyfile(temp_path, sibling)
        if target.exists():
            shutil.copymode(target, sibling)
        else:
            sibling.chmod(0o755)

        if os.name == "nt":
            _swap_windows(sibling, target)
        else:
            os.replace(sibling, target)
    except OSError as exc:
        raise SwapFailed(
            f"Could not replace {target}: {exc}",
            hint="Check that you can write to the install directory.",
        ) from exc
    finally:
        sibling.unlink(missing_ok=True)


def _swap_windows(sibling: Path, target: Path) -> None:
    backup = target.with_name(target.name + ".old")
    backup.unlink(missing_ok=True)
    os.replace(target, backup)
    try:
        os.replace(sibling, target)
    except OSError:
        os.replace(backup, target)
        raise


# ---------------------------------------------------------------------------
# Updater
# ---------------------------------------------------------------------------


class SelfUpdater:
    """Checks GitHub for a newer release and installs it.

    Args:
        client: HTTP client to use.  When ``None`` a short-lived client is
            created per request.  A caller-supplied client is never closed.
        current_version: Version of the running program.
        executable: File to replace; defaults to :func:`current_executable`.
        target: Target triple; defaults to :func:`platform_target`.
        replace: ``replace(temp_path, executable)``; injectable for tests.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        current_version: str = __version__,
        executable: Path | None = None,
        target: str | None = None,
        replace: Callable[[Path, Path], None] = replace_executable,
    ) -> None:
        self._client = client
        self.current_version = current_version
        self._executable = Path(executable) if executable is not None else None
        self.target = target
        self.replace = replace
        self.latest_seen: str | None = None

    @property
    def executable(self) -> Path:
        """The file to replace, resolved on first use so ``check`` never needs it."""
        if self._executable is None:
            self._executable = current_executable()
        return self._executable

    @contextlib.contextmanager
    def _session(self) -> Iterator[httpx.Client]:
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(
            timeout=httpx.Timeout(REQUEST_TIMEOUT, connect=10.0),
            follow_redirects=True,
            headers={"User-Agent": f"{BINARY_NAME}/{self.current_version}"},
        ) as client:
            yield client

    # -- Stages ------------------------------------------------------------

    def check(self) -> UpdateManifest | None:
        """Return the manifest of a newer release, or ``None`` when up to date.

        Raises:
            UpdateNetworkError: The release API is unreachable or errored.
            UpdateError: The release has no asset or checksum for this platform.
        """
        logger.debug("Checking %s", LATEST_RELEASE_URL)
        release = self._get_json(LATEST_RELEASE_URL)

        latest = str(release.get("tag_name", "")).lstrip("v")
        if not latest:
            raise UpdateError("Latest release has no tag")
        self.latest_seen = latest
        if parse_version(latest) <= parse_version(self.current_version):
            logger.debug("Up to date: %s >= %s", self.current_version, latest)
            return None

        target = self.target or platform_target()
        asset_name = asset_name_for(target)
        assets = {a.get("name"): a for a in release.get("assets", []) if isinstance(a, dict)}
        asset = assets.get(asset_name)
        if asset is None or not asset.get("browser_download_url"):
            raise UpdateError(
                f"Release {latest} has no asset for {target} (expected '{asset_name}')"
            )

        checksum = self._asset_checksum(asset, assets.get(f"{asset_name}.sha256"))
        manifest = UpdateManifest(
            current_version=self.current_version,
            latest_version=latest,
            asset_name=asset_name,
            download_url=asset["browser_download_url"],
            checksum=checksum,
        )
        logger.debug("Update available: %s -> %s", self.current_version, latest)
        return manifest

    def download(self, manifest: UpdateManifest) -> Path:
        """Stream the release asset to a temporary file and return its path.

        Raises:
            UpdateNetworkError: The partial file has been removed.
        """
        fd, tmp_name = tempfile.mkstemp(prefix=f"{BINARY_NAME}-update-")
        path = Path(tmp_name)
        logger.debug("Downloading %s to %s", manifest.download_url, path)
        try:
            with os.fdopen(fd, "wb") as handle, self._session() as client:
                with client.stream("GET", manifest.download_url) as response:
                    response.raise_for_status()
                    for chunk in response.iter_bytes(_CHUNK_SIZE):
                        handle.write(chunk)
        except httpx.HTTPStatusError as exc:
            path.unlink(missing_ok=True)
            raise UpdateNetworkError(
                f"Download of {manifest.asset_name} failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            path.unlink(missing_ok=True)
            raise UpdateNetworkError(f"Download of {manifest.asset_name} failed: {exc}") from exc
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        return path

    def verify(self, path: Path, manifest: UpdateManifest) -> None:
        """Compare the SHA-256 of *path* to the manifest.

        Raises:
            ChecksumMismatch: *path* has been deleted.
        """
        actual = sha256_file(path)
        if actual != manifest.checksum:
            path.unlink(missing_ok=True)
            raise ChecksumMismatch(manifest.checksum, actual)
        logger.debug("Checksum verified: %s", actual)

    def swap(self, path: Path) -> None:
        """Install *path* as the new executable and remove the temporary file."""
        try:
            self.replace(path, self.executable)
        except SwapFailed:
            raise
        except OSError as exc:
            raise SwapFailed(f"Could not replace {self.executable}: {exc}") from exc
        finally:
            path.unlink(missing_ok=True)
        logger.debug("Replaced %s", self.executable)

    def run(self) -> UpdateResult:
        """Drive the whole flow and report the final state."""
        manifest = self.check()
        if manifest is None:
            return UpdateResult(
                state=UpdateState.UP_TO_DATE,
                current_version=self.current_version,
                latest_version=self.latest_seen or self.current_version,
            )

        logger.debug("Will replace %s", self.executable)
        path = self.download(manifest)
        self.verify(path, manifest)
        self.swap(path)
        return UpdateResult(
            state=UpdateState.DONE,
            current_version=manifest.current_version,
            latest_version=manifest.latest_version,
        )

    # -- Internal helpers --------------------------------------------------

    def _get(self, url: str) -> httpx.Response:
        try:
            with self._session() as client:
                response = client.get(url, headers={"Accept": "application/vnd.github+json"})
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            raise UpdateNetworkError(
                f"GET {url} returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpdateNetworkError(
                f"Cannot reach {url}: {exc}",
                hint="Check your network connection and try again.",
            ) from exc

    def _get_json(self, url: str) -> dict[str, Any]:
        response = self._get(url)
        try:
            data = response.json()
        except ValueError as exc:
            raise UpdateNetworkError(f"GET {url} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpdateNetworkError(f"GET {url} returned an unexpected payload")
        return data

    def _asset_checksum(self, asset: dict[str, Any], checksum_asset: dict[str, Any] | None) -> str:
        digest = asset.get("digest") or ""
        if digest.startswith("sha256:"):
            return digest.split(":", 1)[1].strip().lower()

        if checksum_asset and checksum_asset.get("browser_download_url"):
            text = self._get(checksum_asset["browser_download_url"]).text
            fields = text.split()
            if fields:
                return fields[0].lower()

        raise UpdateError(f"No SHA-256 checksum published for {asset.get('name')}")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()
