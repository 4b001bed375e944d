"""Filesystem layout of published outputs.

Outputs live at the path produced by substituting a commit sha into the
output template. The path component that carries the sha is the unit that
is created by a publish and removed by retention, for example with the
template `/srv/builds/app-{HEAD_SHA}/dist` the unit for `abc123` is
`/srv/builds/app-abc123`. Staging happens in a hidden sibling directory of
those units so that moving a finished output into place is a rename within
one filesystem.
"""

from collections.abc import AsyncGenerator
import logging
import os
from pathlib import Path

import aiofiles
import yaml
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .config import SHA_PLACEHOLDER
from .models import MARKER_FILENAME, OutputMarker, PublishedOutput

_LOGGER = logging.getLogger(__name__)

__all__ = ["OutputLayout", "read_output", "write_marker"]

STAGING_DIRNAME = ".gh-artifact-sync-staging"


class OutputLayout:
    """Maps commit shas to output paths for an output template."""

    def __init__(self, template: str) -> None:
        if SHA_PLACEHOLDER not in template:
            raise ValueError(f"Output template must contain {SHA_PLACEHOLDER}")
        self._template = template
        prefix, _, suffix = template.partition(SHA_PLACEHOLDER)
        self._parent = Path(os.path.dirname(prefix) or ".")
        self._unit_prefix = os.path.basename(prefix)
        self._unit_suffix = suffix.split("/", 1)[0]

    @property
    def template(self) -> str:
        return self._template

    @property
    def parent(self) -> Path:
        """Directory holding one entry per published commit."""
        return self._parent

    @property
    def staging_root(self) -> Path:
        """Scratch directory on the same filesystem as the outputs."""
        return self._parent / STAGING_DIRNAME

    def path_for(self, sha: str) -> Path:
        """Return the output directory for a commit."""
        return Path(self._template.replace(SHA_PLACEHOLDER, sha))

    def root_for(self, sha: str) -> Path:
        """Return the top level path created for a commit."""
        return self._parent / f"{self._unit_prefix}{sha}{self._unit_suffix}"

    def sha_of(self, name: str) -> str | None:
        """Return the sha encoded in a directory name under `parent`."""
        if name == STAGING_DIRNAME:
            return None
        if not name.startswith(self._unit_prefix) or not name.endswith(
            self._unit_suffix
        ):
            return None
        end = len(name) - len(self._unit_suffix)
        if end <= len(self._unit_prefix):
            return None
        return name[len(self._unit_prefix) : end]

    async def iter_published(self) -> AsyncGenerator[PublishedOutput, None]:
        """Yield every complete output found on disk.

        Directories without a readable marker for the expected sha are
        skipped; they were not created by this service or never completed.
        """
        try:
            entries = sorted(self._parent.iterdir())
        except FileNotFoundError:
            return
        for entry in entries:
            if (sha := self.sha_of(entry.name)) is None:
                continue
            if (output := await read_output(self.path_for(sha))) is None:
                continue
            if output.sha != sha:
                _LOGGER.warning(
                    "Ignoring %s: marker names commit %s", entry, output.sha
                )
                continue
            yield output


async def read_output(directory: Path) -> PublishedOutput | None:
    """Read the marker of an output directory, if it is complete."""
    marker_path = directory / MARKER_FILENAME
    try:
        async with aiofiles.open(str(marker_path)) as marker_file:
            content = await marker_file.read()
    except FileNotFoundError:
        return None
    except OSError as err:
        _LOGGER.warning("Unable to read marker %s: %s", marker_path, err)
        return None
    try:
        marker = OutputMarker.parse_yaml(content)
    except (
        yaml.YAMLError,
        MissingField,
        InvalidFieldValue,
        ValueError,
        TypeError,
        AttributeError,
    ) as err:
        _LOGGER.warning("Invalid marker %s: %s", marker_path, err)
        return None
    return PublishedOutput.from_marker(directory, marker)


async def write_marker(directory: Path, marker: OutputMarker) -> None:
    """Write the marker file into an output directory."""
    async with aiofiles.open(str(directory / MARKER_FILENAME), mode="w") as marker_file:
        await marker_file.write(marker.yaml())
        await marker_file.flush()
