"""Data model for sync requests, artifacts and published outputs.

A `SyncRequest` is created for every accepted webhook delivery and lives only
until the coordinator admits or supersedes it. An `ArtifactHandle` is the
short lived result of resolving an artifact for one sync attempt. A
`PublishedOutput` describes a directory on disk holding the extracted contents
of one commit's artifact; its `OutputMarker` is written inside the directory
and is the durable proof that the directory is complete.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

__all__ = [
    "SyncRequest",
    "ArtifactHandle",
    "OutputMarker",
    "PublishedOutput",
    "TrackedBranch",
    "SyncState",
    "Admission",
    "SyncStatus",
    "StatusInfo",
    "Snapshot",
]

MARKER_FILENAME = ".gh-artifact-sync.yaml"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class SyncRequest(DataClassDictMixin):
    """A request to mirror the artifact built for a commit."""

    commit_sha: str
    """Commit identifier assigned by the provider."""

    branch: str
    """Branch the commit was delivered for."""

    owner: str
    """Owner (user or organization) of the repository."""

    repo: str
    """Name of the repository."""

    event: str = "push"
    """Name of the webhook event that produced this request."""

    received_at: datetime = field(default_factory=utcnow)
    """When the delivery was accepted."""

    @property
    def short_sha(self) -> str:
        return self.commit_sha[:12]

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return f"{self.repository}@{self.short_sha} ({self.branch})"


@dataclass(frozen=True, kw_only=True)
class ArtifactHandle:
    """A resolved, downloadable artifact of a workflow run."""

    run_id: int
    artifact_id: int
    name: str
    size: int
    """Size of the archive in bytes as reported by the API."""

    download_url: str
    expires_at: datetime | None = None


@dataclass(frozen=True, kw_only=True)
class OutputMarker(DataClassDictMixin):
    """Contents of the marker file written into every published directory."""

    sha: str
    created_at: datetime
    run_id: int | None = None
    artifact_id: int | None = None
    artifact_name: str | None = None

    def yaml(self) -> str:
        """Return a YAML string representation of the marker."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    @classmethod
    def parse_yaml(cls, content: str) -> "OutputMarker":
        """Parse a serialized marker."""
        return yaml_decode(content, cls)

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, kw_only=True)
class PublishedOutput:
    """A complete output directory for a commit."""

    sha: str
    directory: Path
    created_at: datetime
    run_id: int | None = None
    artifact_id: int | None = None
    artifact_name: str | None = None

    @classmethod
    def from_marker(cls, directory: Path, marker: OutputMarker) -> "PublishedOutput":
        return cls(
            sha=marker.sha,
            directory=directory,
            created_at=marker.created_at,
            run_id=marker.run_id,
            artifact_id=marker.artifact_id,
            artifact_name=marker.artifact_name,
        )

    def marker(self) -> OutputMarker:
        return OutputMarker(
            sha=self.sha,
            created_at=self.created_at,
            run_id=self.run_id,
            artifact_id=self.artifact_id,
            artifact_name=self.artifact_name,
        )


class SyncState(StrEnum):
    """State of the tracked branch."""

    IDLE = "Idle"
    SYNCING = "Syncing"


class Admission(StrEnum):
    """Outcome of submitting a request to the coordinator."""

    STARTED = "started"
    """The request became the in-flight pipeline."""

    PENDING = "pending"
    """The request replaced the pending slot behind the in-flight pipeline."""

    DUPLICATE = "duplicate"
    """The commit is already in flight or pending."""

    IGNORED = "ignored"
    """The request is for a branch that is not tracked."""


class SyncStatus(StrEnum):
    """Processing status for a commit."""

    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


@dataclass
class StatusInfo:
    """Processing status and optional error message for a commit."""

    status: SyncStatus
    error: str | None = None

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.error:
            return f"{self.status}: {self.error}"
        return str(self.status)


@dataclass
class TrackedBranch:
    """Mutable state of the single tracked branch.

    Only the coordinator's transition functions write to this object.
    """

    branch_name: str
    current_sha: str | None = None
    in_flight: SyncRequest | None = None
    pending: SyncRequest | None = None

    @property
    def state(self) -> SyncState:
        return SyncState.SYNCING if self.in_flight else SyncState.IDLE


@dataclass(frozen=True)
class Snapshot:
    """Read-only copy of the tracked branch state."""

    branch: str
    state: SyncState
    current_sha: str | None
    in_flight_sha: str | None
    pending_sha: str | None
