"""Removal of outputs that are no longer published."""

import asyncio
import logging
from pathlib import Path
import shutil

from .layout import OutputLayout

_LOGGER = logging.getLogger(__name__)

__all__ = ["collect_garbage"]


async def collect_garbage(
    layout: OutputLayout, current_sha: str | None, retain: int
) -> list[Path]:
    """Delete old outputs, keeping the live one and `retain` recent others.

    Only directories carrying a valid marker are considered. A failure to
    delete one output is logged and does not stop the others from being
    removed.

    Returns:
        The paths that were removed
    """
    outputs = [output async for output in layout.iter_published()]
    history = sorted(
        (output for output in outputs if output.sha != current_sha),
        key=lambda output: output.created_at,
        reverse=True,
    )
    removed: list[Path] = []
    for output in history[retain:]:
        root = layout.root_for(output.sha)
        _LOGGER.info("Removing stale output %s", root)
        try:
            await asyncio.to_thread(shutil.rmtree, root)
        except OSError as err:
            _LOGGER.warning("Unable to remove stale output %s: %s", root, err)
            continue
        removed.append(root)
    return removed
