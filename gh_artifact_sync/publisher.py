"""Publish extracted artifacts behind an atomically swapped symlink.

A publish runs in four steps:

  1. Extract the archive into a fresh directory under the staging root.
  2. Verify the archive and the extracted tree.
  3. Rename the staged directory to the commit's output path.
  4. Point the symlink at the output by renaming a new link over it.

A failure in steps 1 to 3 never touches the symlink, so readers keep seeing
the previously published output. The symlink is never removed: a temporary
link is created next to it and renamed over it, so any reader resolving the
link sees either the old or the new target.
"""

import asyncio
from collections.abc import Callable
import logging
import os
from pathlib import Path, PurePosixPath
import secrets
import shutil
import tempfile
import zipfile
import zlib

from .context import stage_context
from .exceptions import CorruptArtifact, PublishError, SupersededError
from .layout import OutputLayout, read_output, write_marker
from .models import ArtifactHandle, PublishedOutput, utcnow

_LOGGER = logging.getLogger(__name__)

__all__ = ["Publisher", "extract_archive", "replace_symlink"]


def _check_member(name: str) -> None:
    """Reject archive members that would escape the extraction directory."""
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts:
        raise CorruptArtifact(f"Archive member has an unsafe path: {name}")
    # Drive letters
    if path.parts and ":" in path.parts[0]:
        raise CorruptArtifact(f"Archive member has an unsafe path: {name}")


def extract_archive(archive: Path, destination: Path) -> int:
    """Extract a zip archive and verify the result, returning the file count.

    Raises:
        CorruptArtifact: The archive is truncated, unreadable, fails its CRC
            check, contains unsafe paths, or was not extracted completely.
        PublishError: The filesystem failed while writing the extraction.
    """
    try:
        with zipfile.ZipFile(archive) as zip_file:
            members = zip_file.infolist()
            for member in members:
                _check_member(member.filename)
            if (bad_member := zip_file.testzip()) is not None:
                raise CorruptArtifact(f"Archive member {bad_member} failed CRC check")
            destination.mkdir(parents=True, exist_ok=True)
            zip_file.extractall(destination)
    except (zipfile.BadZipFile, zlib.error, EOFError) as err:
        raise CorruptArtifact(f"Unable to read archive {archive.name}: {err}") from err
    except OSError as err:
        raise PublishError(f"Unable to extract archive into {destination}: {err}") from err

    files = 0
    for member in members:
        path = destination / member.filename
        if member.is_dir():
            if not path.is_dir():
                raise CorruptArtifact(f"Directory {member.filename} was not extracted")
            continue
        if not path.is_file():
            raise CorruptArtifact(f"File {member.filename} was not extracted")
        if path.stat().st_size != member.file_size:
            raise CorruptArtifact(
                f"File {member.filename} is truncated ({path.stat().st_size} of "
                f"{member.file_size} bytes)"
            )
        files += 1
    return files


def replace_symlink(link: Path, target: Path) -> None:
    """Atomically point `link` at `target`.

    A new link is created under a temporary name in the same directory and
    renamed over `link`, never unlink-then-link.
    """
    link.parent.mkdir(parents=True, exist_ok=True)
    temporary = link.with_name(f".{link.name}.{secrets.token_hex(6)}.tmp")
    os.symlink(target, temporary)
    try:
        os.replace(temporary, link)
    except OSError:
        temporary.unlink(missing_ok=True)
        raise


class Publisher:
    """Stages, verifies and publishes artifacts for the configured layout."""

    def __init__(self, layout: OutputLayout, symlink: Path) -> None:
        self._layout = layout
        self._symlink = symlink

    @property
    def layout(self) -> OutputLayout:
        return self._layout

    @property
    def symlink(self) -> Path:
        return self._symlink

    async def current(self) -> PublishedOutput | None:
        """Return the output the symlink points at, if any."""
        try:
            target = Path(os.readlink(self._symlink))
        except FileNotFoundError:
            return None
        except OSError as err:
            _LOGGER.warning("Unable to read symlink %s: %s", self._symlink, err)
            return None
        if not target.is_absolute():
            target = self._symlink.parent / target
        return await read_output(target)

    async def cleanup_staging(self) -> None:
        """Remove staging leftovers of an interrupted publish."""
        staging_root = self._layout.staging_root
        if not staging_root.exists():
            return
        _LOGGER.info("Removing stale staging directory %s", staging_root)
        await asyncio.to_thread(shutil.rmtree, staging_root, ignore_errors=True)

    async def publish(
        self,
        sha: str,
        archive: Path,
        handle: ArtifactHandle | None = None,
        guard: Callable[[], bool] | None = None,
    ) -> PublishedOutput:
        """Publish the artifact archive for a commit.

        Args:
            sha: The commit the archive was built from
            archive: Path of the downloaded zip archive
            handle: The resolved artifact, recorded in the output marker
            guard: Called right before the symlink swap; returning False
                aborts the swap with `SupersededError`

        Returns:
            The published output the symlink now points at
        """
        output = await self.stage(sha, archive, handle)
        if guard is not None and not guard():
            raise SupersededError(
                f"A newer commit was published, not switching to {sha[:12]}"
            )
        with stage_context("swap"):
            try:
                replace_symlink(self._symlink, output.directory.absolute())
            except OSError as err:
                raise PublishError(
                    f"Unable to point {self._symlink} at {output.directory}: {err}",
                    cutover=True,
                ) from err
        _LOGGER.info("Published %s at %s", sha[:12], self._symlink)
        return output

    async def stage(
        self, sha: str, archive: Path, handle: ArtifactHandle | None = None
    ) -> PublishedOutput:
        """Extract, verify and move an output into place without publishing it."""
        staging_root = self._layout.staging_root
        try:
            staging_root.mkdir(parents=True, exist_ok=True)
            staged_root = Path(tempfile.mkdtemp(prefix=f"{sha[:12]}-", dir=staging_root))
        except OSError as err:
            raise PublishError(f"Unable to create staging directory: {err}") from err

        try:
            final_path = self._layout.path_for(sha)
            staged_path = staged_root / final_path.relative_to(
                self._layout.root_for(sha)
            )
            if handle is not None and (size := archive.stat().st_size) != handle.size:
                # Some artifact backends report the unpacked size
                _LOGGER.warning(
                    "Archive for %s is %d bytes, the API reported %d",
                    sha[:12],
                    size,
                    handle.size,
                )
            with stage_context("extract"):
                files = await asyncio.to_thread(extract_archive, archive, staged_path)
            _LOGGER.debug("Extracted %d files for %s", files, sha[:12])
            output = PublishedOutput(
                sha=sha,
                directory=final_path,
                created_at=utcnow(),
                run_id=handle.run_id if handle else None,
                artifact_id=handle.artifact_id if handle else None,
                artifact_name=handle.name if handle else None,
            )
            try:
                await write_marker(staged_path, output.marker())
            except OSError as err:
                raise PublishError(f"Unable to write output marker: {err}") from err
            with stage_context("rename"):
                return await self._move_into_place(sha, staged_root, output)
        finally:
            await asyncio.to_thread(shutil.rmtree, staged_root, ignore_errors=True)

    async def _move_into_place(
        self, sha: str, staged_root: Path, output: PublishedOutput
    ) -> PublishedOutput:
        """Rename a staged output to its final path in one operation."""
        if (existing := await read_output(output.directory)) is not None:
            if existing.sha == sha:
                _LOGGER.info(
                    "Output for %s already exists at %s, reusing it",
                    sha[:12],
                    existing.directory,
                )
                return existing
        root = self._layout.root_for(sha)
        if root.exists() or root.is_symlink():
            raise PublishError(f"{root} exists but is not a complete output")
        try:
            root.parent.mkdir(parents=True, exist_ok=True)
            os.rename(staged_root, root)
        except OSError as err:
            raise PublishError(
                f"Unable to move {staged_root} to {root}: {err}", cutover=True
            ) from err
        return output
