"""Shared fixtures for gh-artifact-sync tests."""

import asyncio
import io
from pathlib import Path
import zipfile

import pytest

from gh_artifact_sync.exceptions import ArtifactNotFoundError, RunNotFoundError
from gh_artifact_sync.layout import OutputLayout
from gh_artifact_sync.models import ArtifactHandle
from gh_artifact_sync.publisher import Publisher


ARTIFACT_NAME = "site"


def make_archive(files: dict[str, str]) -> bytes:
    """Return the bytes of a zip archive holding the given files."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def site_archive(sha: str) -> bytes:
    """Return an archive whose contents identify the commit it was built from."""
    return make_archive(
        {
            "index.html": f"<h1>{sha}</h1>",
            "assets/app.js": f"console.log('{sha}');",
        }
    )


class FakeArtifactClient:
    """In memory stand-in for the artifact client.

    Archives are registered per commit sha. A commit without an archive
    behaves like a commit whose run has not finished. Errors queued in
    `errors` are raised, one per call, before the lookup succeeds. A gate
    blocks the lookup of a commit until it is set.
    """

    def __init__(self) -> None:
        self.archives: dict[str, bytes] = {}
        self.errors: dict[str, list[Exception]] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, str]] = []
        self.downloads: list[str] = []
        self._runs: dict[int, str] = {}

    def add(self, sha: str, archive: bytes | None = None) -> None:
        self.archives[sha] = archive if archive is not None else site_archive(sha)

    def gate(self, sha: str) -> asyncio.Event:
        self.gates[sha] = asyncio.Event()
        return self.gates[sha]

    def lookups(self, sha: str) -> int:
        return self.calls.count(("find", sha))

    async def find_latest_run(
        self, owner: str, repo: str, branch: str, commit_sha: str
    ) -> int:
        self.calls.append(("find", commit_sha))
        if (gate := self.gates.get(commit_sha)) is not None:
            await gate.wait()
        if errors := self.errors.get(commit_sha):
            raise errors.pop(0)
        if commit_sha not in self.archives:
            raise RunNotFoundError(f"No run for {commit_sha}")
        run_id = len(self._runs) + 1000
        self._runs[run_id] = commit_sha
        return run_id

    async def resolve_artifact(
        self, owner: str, repo: str, run_id: int, artifact_name: str
    ) -> ArtifactHandle:
        if artifact_name != ARTIFACT_NAME:
            raise ArtifactNotFoundError(f"No artifact {artifact_name}")
        sha = self._runs[run_id]
        return ArtifactHandle(
            run_id=run_id,
            artifact_id=run_id + 1,
            name=artifact_name,
            size=len(self.archives[sha]),
            download_url=f"https://api.example.com/artifacts/{run_id}/zip",
        )

    async def download(self, handle: ArtifactHandle, destination: Path) -> int:
        sha = self._runs[handle.run_id]
        self.downloads.append(sha)
        data = self.archives[sha]
        destination.write_bytes(data)
        return len(data)


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Wait until `predicate()` is true, yielding to the event loop."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture(name="layout")
def layout_fixture(tmp_path: Path) -> OutputLayout:
    """Layout publishing into a temporary directory."""
    return OutputLayout(str(tmp_path / "builds" / "site-{HEAD_SHA}"))


@pytest.fixture(name="symlink")
def symlink_fixture(tmp_path: Path) -> Path:
    return tmp_path / "current"


@pytest.fixture(name="publisher")
def publisher_fixture(layout: OutputLayout, symlink: Path) -> Publisher:
    return Publisher(layout, symlink)


@pytest.fixture(name="fake_client")
def fake_client_fixture() -> FakeArtifactClient:
    return FakeArtifactClient()


class RecordingSleep:
    """Records requested backoff delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture(name="sleep")
def sleep_fixture() -> RecordingSleep:
    return RecordingSleep()
