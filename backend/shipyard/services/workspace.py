"""Workspace provisioning: materialize app source on local disk.

Layout under ``data_dir``::

    apps/<app>               live workspace the service runs from
    builds/<app>-<job_id>    fresh staging tree for one job
    uploads/<app>.zip        last uploaded archive for file-based apps

A job always fetches into a brand-new staging directory. Only after
install and build succeed is the staging tree promoted over the live
workspace, so a failed build never touches the running service and stale
files from a previous build never leak into the next one.
"""

import asyncio
import io
import logging
import os
import re
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import List, Optional, Union

from .command_runner import OutputCallback, run_exec
from ..core.logging_config import redact
from ..exceptions import FetchError

logger = logging.getLogger(__name__)

# Prevent git from prompting for credentials or opening a pager inside the worker.
GIT_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_PAGER": "cat",
    "GIT_ASKPASS": "echo",
}

# Clone + checkout of a large repository over a slow link.
DEFAULT_FETCH_TIMEOUT = 600


class WorkspaceProvisioner:
    """Owns every on-disk path that belongs to an app."""

    def __init__(
        self,
        data_dir: Union[str, Path],
        git_binary: str = "git",
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
    ):
        self.data_dir = Path(data_dir)
        self.apps_dir = self.data_dir / "apps"
        self.builds_dir = self.data_dir / "builds"
        self.uploads_dir = self.data_dir / "uploads"
        self.git_binary = git_binary
        self.fetch_timeout = fetch_timeout

    def ensure_dirs(self) -> None:
        for path in (self.apps_dir, self.builds_dir, self.uploads_dir):
            path.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def live_path(self, app_name: str) -> Path:
        return self.apps_dir / app_name

    def staging_path(self, app_name: str, job_id: int) -> Path:
        return self.builds_dir / f"{app_name}-{job_id}"

    def archive_path(self, app_name: str) -> Path:
        return self.uploads_dir / f"{app_name}.zip"

    def _staging_dirs(self, app_name: str) -> List[Path]:
        if not self.builds_dir.exists():
            return []
        pattern = re.compile(rf"^{re.escape(app_name)}-\d+$")
        return [p for p in self.builds_dir.iterdir() if pattern.match(p.name)]

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    async def prepare_staging(self, app_name: str, job_id: int) -> Path:
        """Create an empty staging directory, removing leftovers for the same app."""
        return await asyncio.to_thread(self._prepare_staging, app_name, job_id)

    def _prepare_staging(self, app_name: str, job_id: int) -> Path:
        self.ensure_dirs()
        for stale in self._staging_dirs(app_name):
            logger.info(f"Removing stale build directory {stale}")
            shutil.rmtree(stale, ignore_errors=True)
        staging = self.staging_path(app_name, job_id)
        staging.mkdir(parents=True)
        return staging

    async def promote(self, app_name: str, staging: Path) -> Path:
        """Replace the live workspace with *staging*; returns the live path."""
        return await asyncio.to_thread(self._promote, app_name, staging)

    def _promote(self, app_name: str, staging: Path) -> Path:
        live = self.live_path(app_name)
        live.parent.mkdir(parents=True, exist_ok=True)
        retired: Optional[Path] = None
        if live.exists():
            retired = live.with_name(f".{app_name}.retired")
            if retired.exists():
                shutil.rmtree(retired, ignore_errors=True)
            live.rename(retired)
        staging.rename(live)
        if retired is not None:
            shutil.rmtree(retired, ignore_errors=True)
        logger.info(f"Promoted {staging} to {live}")
        return live

    async def discard(self, path: Path) -> None:
        await asyncio.to_thread(shutil.rmtree, path, True)

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def clone_or_checkout(
        self,
        repo_url: str,
        branch: str,
        dest: Path,
        on_output: Optional[OutputCallback] = None,
    ) -> None:
        """Shallow-clone *branch* of *repo_url* into the empty directory *dest*.

        Raises:
            FetchError: with git's own output when the clone fails.
        """
        args = [
            self.git_binary, "clone",
            "--depth", "1",
            "--branch", branch,
            "--single-branch",
            "--", repo_url, str(dest),
        ]
        display = f"git clone --depth 1 --branch {branch} {redact(repo_url)}"
        result = await run_exec(
            args,
            env=GIT_ENV,
            on_output=on_output,
            timeout=self.fetch_timeout,
            display=display,
        )
        if not result.ok:
            reason = "timed out" if result.timed_out else f"exited with code {result.exit_code}"
            raise FetchError(f"git clone of branch '{branch}' {reason}", output=result.tail())

    async def extract_archive(self, source: Union[bytes, Path], dest: Path) -> List[str]:
        """Unzip *source* (bytes or a path) into *dest*. Returns the extracted names."""
        return await asyncio.to_thread(self._extract_archive, source, dest)

    def _extract_archive(self, source: Union[bytes, Path], dest: Path) -> List[str]:
        try:
            if isinstance(source, (bytes, bytearray)):
                archive = zipfile.ZipFile(io.BytesIO(source))
            else:
                archive = zipfile.ZipFile(source)
        except FileNotFoundError as e:
            raise FetchError(f"Uploaded archive is missing: {e.filename}") from e
        except zipfile.BadZipFile as e:
            raise FetchError(f"Corrupt archive: {e}") from e

        dest = dest.resolve()
        with archive:
            members = [m for m in archive.infolist() if not m.filename.startswith("__MACOSX/")]
            if not members:
                raise FetchError("Archive is empty")

            prefix = _common_root(members)
            extracted: List[str] = []
            for member in members:
                name = member.filename[len(prefix):] if prefix else member.filename
                if not name:
                    continue
                target = (dest / name).resolve()
                if target != dest and dest not in target.parents:
                    raise FetchError(f"Archive entry escapes the workspace: {member.filename}")
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                try:
                    with archive.open(member) as src, open(target, "wb") as out:
                        shutil.copyfileobj(src, out)
                except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
                    raise FetchError(f"Corrupt archive entry {member.filename}: {e}") from e
                # Preserve the executable bit for scripts packed on unix
                mode = (member.external_attr >> 16) & 0o777
                if mode:
                    target.chmod(mode)
                extracted.append(name)
        return extracted

    def stage_upload(self, data: bytes) -> Path:
        """Write an upload to a private file next to the stored archives.

        Nothing an app uses is replaced until ``commit_upload``.
        """
        self.ensure_dirs()
        fd, name = tempfile.mkstemp(prefix=".upload-", suffix=".zip.part", dir=self.uploads_dir)
        with os.fdopen(fd, "wb") as out:
            out.write(data)
        return Path(name)

    def commit_upload(self, app_name: str, staged: Path) -> Path:
        """Make a staged upload the app's source artifact (a rename)."""
        path = self.archive_path(app_name)
        staged.replace(path)
        return path

    def store_archive(self, app_name: str, data: bytes) -> Path:
        """Persist an uploaded archive as the app's source artifact."""
        return self.commit_upload(app_name, self.stage_upload(data))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def remove_app(self, app_name: str) -> List[str]:
        """Remove the live workspace, staging dirs and stored archive.

        Missing paths are skipped. Returns the paths that were removed.
        """
        return await asyncio.to_thread(self._remove_app, app_name)

    def _remove_app(self, app_name: str) -> List[str]:
        removed: List[str] = []
        for path in [self.live_path(app_name), *self._staging_dirs(app_name)]:
            if path.exists():
                shutil.rmtree(path)
                removed.append(str(path))
        archive = self.archive_path(app_name)
        if archive.exists():
            archive.unlink()
            removed.append(str(archive))
        return removed


def _common_root(members: List[zipfile.ZipInfo]) -> str:
    """Return "folder/" when every entry lives under one top-level folder."""
    first_parts = {m.filename.split("/", 1)[0] for m in members}
    if len(first_parts) != 1:
        return ""
    root = first_parts.pop()
    if all("/" in m.filename for m in members):
        return root + "/"
    return ""
