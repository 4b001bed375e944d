"""Sync coordinator for the tracked branch.

The coordinator owns the `TrackedBranch` state and is the only writer of it.
Requests are admitted synchronously on the event loop, so every state
transition runs to completion without interleaving. At most one fetch and
publish pipeline is in flight at any time; a request arriving while one is
running takes the single pending slot, replacing whatever was there before
(last-SHA-wins). When the in-flight pipeline finishes, successfully or not,
the pending request is started straight away, otherwise the branch becomes
idle.

Each admitted request gets an increasing admission number. The symlink is
only switched to a commit if no request admitted after it has been
published already, so a stale completion can never replace a newer output.
"""

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable
import itertools
import logging
from pathlib import Path
import tempfile

from .client import ArtifactClient
from .context import stage_context
from .exceptions import PublishError, SupersededError, SyncException
from .models import (
    Admission,
    ArtifactHandle,
    Snapshot,
    StatusInfo,
    SyncRequest,
    SyncStatus,
    TrackedBranch,
)
from .publisher import Publisher
from .retention import collect_garbage
from .retry import RetryPolicy, retry_async
from .task import TaskService, get_task_service

_LOGGER = logging.getLogger(__name__)

__all__ = ["SyncCoordinator"]

MAX_RESULTS = 50
ARCHIVE_NAME = "artifact.zip"


class SyncCoordinator:
    """Serializes fetch and publish pipelines for one tracked branch."""

    def __init__(
        self,
        branch: str,
        artifact_name: str,
        client: ArtifactClient,
        publisher: Publisher,
        retry_policy: RetryPolicy | None = None,
        retain: int = 3,
        task_service: TaskService | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._state = TrackedBranch(branch_name=branch)
        self._artifact_name = artifact_name
        self._client = client
        self._publisher = publisher
        self._retry_policy = retry_policy or RetryPolicy()
        self._retain = retain
        self._task_service = task_service or get_task_service()
        self._sleep = sleep
        self._admissions = itertools.count(1)
        self._in_flight_admission = 0
        self._pending_admission = 0
        self._published_admission = 0
        self._task: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing = False
        self._results: OrderedDict[str, StatusInfo] = OrderedDict()

    @property
    def branch(self) -> str:
        return self._state.branch_name

    @property
    def current_sha(self) -> str | None:
        return self._state.current_sha

    def snapshot(self) -> Snapshot:
        """Return a copy of the tracked branch state."""
        state = self._state
        return Snapshot(
            branch=state.branch_name,
            state=state.state,
            current_sha=state.current_sha,
            in_flight_sha=state.in_flight.commit_sha if state.in_flight else None,
            pending_sha=state.pending.commit_sha if state.pending else None,
        )

    @property
    def results(self) -> dict[str, StatusInfo]:
        """Recent per-commit outcomes, oldest first."""
        return dict(self._results)

    def status(self, sha: str) -> StatusInfo | None:
        """Return the outcome of the most recent sync of a commit."""
        return self._results.get(sha)

    async def start(self) -> None:
        """Recover the published commit from disk before accepting requests."""
        await self._publisher.cleanup_staging()
        if (current := await self._publisher.current()) is not None:
            self._state.current_sha = current.sha
            _LOGGER.info(
                "Currently published commit is %s at %s",
                current.sha[:12],
                current.directory,
            )
        else:
            _LOGGER.info("Nothing published at %s yet", self._publisher.symlink)

    def submit(self, request: SyncRequest) -> Admission:
        """Admit a sync request.

        This never blocks; the pipeline runs in a background task.
        """
        state = self._state
        if request.branch != state.branch_name:
            _LOGGER.debug("Ignoring %s, branch is not tracked", request)
            return Admission.IGNORED
        if self._closing:
            _LOGGER.warning("Shutting down, ignoring %s", request)
            return Admission.IGNORED

        if state.in_flight is None:
            self._start(request, next(self._admissions))
            return Admission.STARTED

        if state.in_flight.commit_sha == request.commit_sha:
            _LOGGER.info("Commit %s is already syncing", request.short_sha)
            return Admission.DUPLICATE
        if state.pending is not None:
            if state.pending.commit_sha == request.commit_sha:
                _LOGGER.info("Commit %s is already pending", request.short_sha)
                return Admission.DUPLICATE
            _LOGGER.info(
                "Dropping pending commit %s in favor of %s",
                state.pending.short_sha,
                request.short_sha,
            )
            self._results.pop(state.pending.commit_sha, None)
        state.pending = request
        self._pending_admission = next(self._admissions)
        self._record(request.commit_sha, StatusInfo(SyncStatus.PENDING))
        _LOGGER.info(
            "Commit %s is pending behind %s",
            request.short_sha,
            state.in_flight.short_sha,
        )
        return Admission.PENDING

    async def wait_idle(self) -> None:
        """Wait until no pipeline is running and nothing is pending."""
        await self._idle.wait()

    async def close(self) -> None:
        """Stop accepting requests and cancel the running pipeline."""
        self._closing = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._idle.set()

    def _record(self, sha: str, status: StatusInfo) -> None:
        self._results[sha] = status
        self._results.move_to_end(sha)
        while len(self._results) > MAX_RESULTS:
            self._results.popitem(last=False)

    def _start(self, request: SyncRequest, admission: int) -> None:
        self._state.in_flight = request
        self._in_flight_admission = admission
        self._idle.clear()
        self._record(request.commit_sha, StatusInfo(SyncStatus.PENDING))
        _LOGGER.info("Starting sync of %s", request)
        self._task = self._task_service.create_task(
            self._run(request, admission), name=f"sync-{request.short_sha}"
        )

    def _finish(self, request: SyncRequest) -> None:
        state = self._state
        state.in_flight = None
        if self._closing:
            return
        if (pending := state.pending) is not None:
            state.pending = None
            self._start(pending, self._pending_admission)
            return
        _LOGGER.debug("Branch %s is idle", state.branch_name)
        self._idle.set()

    def _may_publish(self, admission: int) -> bool:
        return admission > self._published_admission

    async def _run(self, request: SyncRequest, admission: int) -> None:
        """Run the pipeline for a request and advance the state machine."""
        status = StatusInfo(SyncStatus.READY)
        try:
            await self._sync(request, admission)
        except SupersededError as err:
            _LOGGER.info("Sync of %s superseded: %s", request, err)
            status = StatusInfo(SyncStatus.FAILED, error=str(err))
        except PublishError as err:
            if err.cutover:
                _LOGGER.critical(
                    "Publishing %s failed during cutover, inspect %s: %s",
                    request,
                    self._publisher.symlink,
                    err,
                )
            else:
                _LOGGER.error("Failed to publish %s: %s", request, err)
            status = StatusInfo(SyncStatus.FAILED, error=str(err))
        except SyncException as err:
            _LOGGER.error("Failed to sync %s: %s", request, err)
            status = StatusInfo(SyncStatus.FAILED, error=str(err))
        except asyncio.CancelledError:
            _LOGGER.info("Sync of %s cancelled", request)
            status = StatusInfo(SyncStatus.FAILED, error="cancelled")
            raise
        except Exception as err:
            _LOGGER.exception("Unexpected error syncing %s", request)
            status = StatusInfo(SyncStatus.FAILED, error=str(err))
        finally:
            self._record(request.commit_sha, status)
            self._finish(request)

    async def _sync(self, request: SyncRequest, admission: int) -> None:
        staging_root = self._publisher.layout.staging_root
        with stage_context(request.short_sha):
            try:
                staging_root.mkdir(parents=True, exist_ok=True)
                download_dir = tempfile.TemporaryDirectory(
                    prefix=f"download-{request.short_sha}-", dir=staging_root
                )
            except OSError as err:
                raise PublishError(f"Unable to create download directory: {err}") from err
            with download_dir as tmp:
                archive = Path(tmp) / ARCHIVE_NAME
                handle = await retry_async(
                    lambda: self._fetch(request, archive),
                    self._retry_policy,
                    sleep=self._sleep,
                )
                output = await self._publisher.publish(
                    request.commit_sha,
                    archive,
                    handle,
                    guard=lambda: self._may_publish(admission),
                )
            self._published_admission = admission
            self._state.current_sha = output.sha
            _LOGGER.info("Commit %s is now published", request.short_sha)

            with stage_context("retention"):
                try:
                    removed = await collect_garbage(
                        self._publisher.layout, output.sha, self._retain
                    )
                except OSError as err:
                    _LOGGER.warning("Unable to clean up old outputs: %s", err)
                else:
                    if removed:
                        _LOGGER.info("Removed %d stale outputs", len(removed))

    async def _fetch(self, request: SyncRequest, archive: Path) -> ArtifactHandle:
        """Locate and download the artifact for a request."""
        with stage_context("fetch"):
            run_id = await self._client.find_latest_run(
                request.owner, request.repo, request.branch, request.commit_sha
            )
            handle = await self._client.resolve_artifact(
                request.owner, request.repo, run_id, self._artifact_name
            )
            size = await self._client.download(handle, archive)
        _LOGGER.info(
            "Downloaded artifact %s of run %d for %s (%d bytes)",
            handle.name,
            run_id,
            request.short_sha,
            size,
        )
        return handle
