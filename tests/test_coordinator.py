"""Tests for the sync coordinator state machine and pipeline."""

import asyncio
import os
from pathlib import Path
import random
from collections.abc import AsyncGenerator

import pytest

from gh_artifact_sync.coordinator import SyncCoordinator
from gh_artifact_sync.exceptions import PermanentError, RunNotFoundError, TransientError
from gh_artifact_sync.layout import OutputLayout
from gh_artifact_sync.models import (
    Admission,
    Snapshot,
    StatusInfo,
    SyncRequest,
    SyncState,
    SyncStatus,
)
from gh_artifact_sync.publisher import Publisher
from gh_artifact_sync.retry import RetryPolicy
from gh_artifact_sync.task.service import TaskServiceImpl

from .conftest import (
    ARTIFACT_NAME,
    FakeArtifactClient,
    RecordingSleep,
    site_archive,
    wait_for,
)


def request(sha: str, branch: str = "main") -> SyncRequest:
    return SyncRequest(commit_sha=sha, branch=branch, owner="octo-org", repo="example")


@pytest.fixture(name="task_service")
def task_service_fixture() -> TaskServiceImpl:
    return TaskServiceImpl()


@pytest.fixture(name="coordinator")
async def coordinator_fixture(
    fake_client: FakeArtifactClient,
    publisher: Publisher,
    task_service: TaskServiceImpl,
    sleep: RecordingSleep,
) -> AsyncGenerator[SyncCoordinator, None]:
    coordinator = SyncCoordinator(
        "main",
        ARTIFACT_NAME,
        fake_client,  # type: ignore[arg-type]
        publisher,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0),
        retain=1,
        task_service=task_service,
        sleep=sleep,
    )
    await coordinator.start()
    yield coordinator
    await coordinator.close()


def published_sha(symlink: Path) -> str | None:
    if not symlink.is_symlink():
        return None
    return (symlink / "index.html").read_text().removeprefix("<h1>").removesuffix(
        "</h1>"
    )


async def test_publish_scenario(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    layout: OutputLayout,
    symlink: Path,
) -> None:
    """Scenario: a delivery for abc123 ends with the symlink at its output."""
    fake_client.add("abc123")

    assert coordinator.submit(request("abc123")) == Admission.STARTED
    assert coordinator.snapshot() == Snapshot(
        branch="main",
        state=SyncState.SYNCING,
        current_sha=None,
        in_flight_sha="abc123",
        pending_sha=None,
    )

    await task_service.block_till_done()

    assert coordinator.snapshot() == Snapshot(
        branch="main",
        state=SyncState.IDLE,
        current_sha="abc123",
        in_flight_sha=None,
        pending_sha=None,
    )
    assert Path(os.readlink(symlink)) == layout.path_for("abc123")
    assert published_sha(symlink) == "abc123"
    assert coordinator.status("abc123") == StatusInfo(SyncStatus.READY)


async def test_pending_starts_without_idle(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    symlink: Path,
) -> None:
    """Scenario: def456 arrives while abc123 runs and starts right after it."""
    fake_client.add("abc123")
    fake_client.add("def456")
    abc_gate = fake_client.gate("abc123")
    def_gate = fake_client.gate("def456")

    assert coordinator.submit(request("abc123")) == Admission.STARTED
    await wait_for(lambda: fake_client.lookups("abc123") == 1)

    assert coordinator.submit(request("def456")) == Admission.PENDING
    snapshot = coordinator.snapshot()
    assert snapshot.in_flight_sha == "abc123"
    assert snapshot.pending_sha == "def456"
    assert coordinator.status("def456") == StatusInfo(SyncStatus.PENDING)

    abc_gate.set()
    await wait_for(lambda: fake_client.lookups("def456") == 1)

    snapshot = coordinator.snapshot()
    assert snapshot.state == SyncState.SYNCING
    assert snapshot.current_sha == "abc123"
    assert snapshot.in_flight_sha == "def456"
    assert snapshot.pending_sha is None
    assert published_sha(symlink) == "abc123"
    assert not coordinator._idle.is_set()

    def_gate.set()
    await task_service.block_till_done()

    assert coordinator.snapshot().state == SyncState.IDLE
    assert published_sha(symlink) == "def456"


async def test_duplicate_deliveries(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
) -> None:
    """Duplicates of the in-flight or pending commit do not start pipelines."""
    fake_client.add("abc123")
    fake_client.add("def456")
    gate = fake_client.gate("abc123")

    assert coordinator.submit(request("abc123")) == Admission.STARTED
    await wait_for(lambda: fake_client.lookups("abc123") == 1)
    assert coordinator.submit(request("abc123")) == Admission.DUPLICATE
    assert coordinator.submit(request("def456")) == Admission.PENDING
    assert coordinator.submit(request("def456")) == Admission.DUPLICATE

    gate.set()
    await task_service.block_till_done()

    assert fake_client.lookups("abc123") == 1
    assert fake_client.lookups("def456") == 1
    assert fake_client.downloads == ["abc123", "def456"]


async def test_last_sha_wins(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    symlink: Path,
) -> None:
    """Only the newest pending commit survives."""
    for sha in ("aaa", "bbb", "ccc", "ddd"):
        fake_client.add(sha)
    gate = fake_client.gate("aaa")

    assert coordinator.submit(request("aaa")) == Admission.STARTED
    assert coordinator.submit(request("bbb")) == Admission.PENDING
    assert coordinator.submit(request("ccc")) == Admission.PENDING
    assert coordinator.submit(request("ddd")) == Admission.PENDING
    assert coordinator.snapshot().pending_sha == "ddd"

    gate.set()
    await task_service.block_till_done()

    assert fake_client.downloads == ["aaa", "ddd"]
    assert fake_client.lookups("bbb") == 0
    assert fake_client.lookups("ccc") == 0
    assert coordinator.status("bbb") is None
    assert list(coordinator.results) == ["aaa", "ddd"]
    assert published_sha(symlink) == "ddd"


async def test_other_branch_ignored(
    coordinator: SyncCoordinator, fake_client: FakeArtifactClient
) -> None:
    assert coordinator.submit(request("abc123", branch="dev")) == Admission.IGNORED
    assert coordinator.snapshot().state == SyncState.IDLE
    assert fake_client.calls == []


async def test_transient_errors_retried(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    sleep: RecordingSleep,
    symlink: Path,
) -> None:
    """The run shows up after the workflow finishes."""
    fake_client.add("abc123")
    fake_client.errors["abc123"] = [
        RunNotFoundError("no run yet"),
        TransientError("502 Bad Gateway", status_code=502),
    ]

    coordinator.submit(request("abc123"))
    await task_service.block_till_done()

    assert fake_client.lookups("abc123") == 3
    assert sleep.delays == [1.0, 2.0]
    assert coordinator.status("abc123") == StatusInfo(SyncStatus.READY)
    assert published_sha(symlink) == "abc123"


async def test_retries_exhausted(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    symlink: Path,
) -> None:
    """A commit whose run never appears fails and keeps the old output."""
    fake_client.add("abc123")
    coordinator.submit(request("abc123"))
    await task_service.block_till_done()

    coordinator.submit(request("missing"))
    await task_service.block_till_done()

    assert fake_client.lookups("missing") == 3
    status = coordinator.status("missing")
    assert status is not None
    assert status.status == SyncStatus.FAILED
    assert "No run for missing" in str(status)
    assert coordinator.snapshot() == Snapshot(
        branch="main",
        state=SyncState.IDLE,
        current_sha="abc123",
        in_flight_sha=None,
        pending_sha=None,
    )
    assert published_sha(symlink) == "abc123"


async def test_failure_advances_to_pending(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    symlink: Path,
) -> None:
    fake_client.add("good")
    gate = fake_client.gate("missing")

    assert coordinator.submit(request("missing")) == Admission.STARTED
    assert coordinator.submit(request("good")) == Admission.PENDING
    gate.set()
    await task_service.block_till_done()

    assert coordinator.status("missing").status == SyncStatus.FAILED  # type: ignore[union-attr]
    assert coordinator.status("good") == StatusInfo(SyncStatus.READY)
    assert published_sha(symlink) == "good"
    # The failed commit is not retried on its own
    assert fake_client.lookups("missing") == 3


async def test_permanent_error_not_retried(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    sleep: RecordingSleep,
) -> None:
    fake_client.add("abc123")
    fake_client.errors["abc123"] = [PermanentError("Bad credentials", status_code=401)]

    coordinator.submit(request("abc123"))
    await task_service.block_till_done()

    assert fake_client.lookups("abc123") == 1
    assert sleep.delays == []
    assert coordinator.status("abc123") == StatusInfo(
        SyncStatus.FAILED, error="Bad credentials"
    )
    assert coordinator.current_sha is None


async def test_corrupt_artifact_keeps_previous(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    layout: OutputLayout,
    symlink: Path,
) -> None:
    fake_client.add("abc123")
    fake_client.add("def456", b"definitely not a zip archive")

    coordinator.submit(request("abc123"))
    await task_service.block_till_done()
    coordinator.submit(request("def456"))
    await task_service.block_till_done()

    status = coordinator.status("def456")
    assert status is not None
    assert status.status == SyncStatus.FAILED
    assert "Unable to read archive" in str(status.error)
    assert published_sha(symlink) == "abc123"
    assert not layout.root_for("def456").exists()
    assert coordinator.current_sha == "abc123"


async def test_stale_completion_cannot_publish(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    symlink: Path,
) -> None:
    """Once a later admission is published, an earlier pipeline may not swap."""
    fake_client.add("abc123")
    coordinator.submit(request("abc123"))
    await task_service.block_till_done()
    assert published_sha(symlink) == "abc123"

    fake_client.add("def456")
    gate = fake_client.gate("def456")
    assert coordinator.submit(request("def456")) == Admission.STARTED
    await wait_for(lambda: fake_client.lookups("def456") == 1)
    # A request admitted after def456 was published meanwhile
    coordinator._published_admission += 10
    gate.set()
    await task_service.block_till_done()

    status = coordinator.status("def456")
    assert status is not None
    assert status.status == SyncStatus.FAILED
    assert "newer commit was published" in str(status.error)
    assert published_sha(symlink) == "abc123"
    assert coordinator.current_sha == "abc123"
    assert coordinator.snapshot().state == SyncState.IDLE


async def test_retention_after_publish(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    layout: OutputLayout,
) -> None:
    """The live output and one previous output are kept."""
    for sha in ("sha1", "sha2", "sha3", "sha4"):
        fake_client.add(sha)
        coordinator.submit(request(sha))
        await task_service.block_till_done()

    outputs = sorted(
        path.name for path in layout.parent.iterdir() if path.name.startswith("site-")
    )
    assert outputs == ["site-sha3", "site-sha4"]


async def test_start_recovers_published_commit(
    tmp_path: Path,
    fake_client: FakeArtifactClient,
    publisher: Publisher,
    task_service: TaskServiceImpl,
) -> None:
    archive = tmp_path / "artifact.zip"
    archive.write_bytes(site_archive("abc123"))
    await publisher.publish("abc123", archive)
    leftover = publisher.layout.staging_root / "def456-partial"
    leftover.mkdir(parents=True)

    coordinator = SyncCoordinator(
        "main",
        ARTIFACT_NAME,
        fake_client,  # type: ignore[arg-type]
        publisher,
        task_service=task_service,
    )
    await coordinator.start()

    assert coordinator.current_sha == "abc123"
    assert not leftover.exists()
    await coordinator.close()


async def test_close_cancels_in_flight(
    coordinator: SyncCoordinator, fake_client: FakeArtifactClient, symlink: Path
) -> None:
    fake_client.add("abc123")
    fake_client.gate("abc123")

    coordinator.submit(request("abc123"))
    await wait_for(lambda: fake_client.lookups("abc123") == 1)
    await coordinator.close()

    assert coordinator.status("abc123") == StatusInfo(
        SyncStatus.FAILED, error="cancelled"
    )
    assert coordinator.submit(request("def456")) == Admission.IGNORED
    assert not symlink.exists()
    await asyncio.wait_for(coordinator.wait_idle(), timeout=1)


@pytest.mark.parametrize("seed", range(5))
async def test_interleaved_requests_publish_latest_success(
    coordinator: SyncCoordinator,
    fake_client: FakeArtifactClient,
    task_service: TaskServiceImpl,
    layout: OutputLayout,
    symlink: Path,
    seed: int,
) -> None:
    """The final target is the last commit whose pipeline succeeded."""
    rng = random.Random(seed)
    shas = [f"sha{index:02d}" for index in range(12)]
    for sha in shas:
        if rng.random() < 0.7:
            fake_client.add(sha)

    for sha in shas:
        coordinator.submit(request(sha))
        await asyncio.sleep(rng.random() * 0.01)
    await task_service.block_till_done()

    assert coordinator.snapshot().state == SyncState.IDLE
    if not fake_client.downloads:
        assert not symlink.exists()
        return
    expected = fake_client.downloads[-1]
    assert coordinator.current_sha == expected
    assert Path(os.readlink(symlink)) == layout.path_for(expected)
    assert published_sha(symlink) == expected
