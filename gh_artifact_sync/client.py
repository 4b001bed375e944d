"""Client for the GitHub Actions artifacts API.

The client locates the newest successful workflow run for a commit, resolves
the named artifact of that run, and streams the artifact archive to disk.
HTTP calls are blocking and are run in worker threads so the event loop that
serves webhooks is never blocked by a download.

Errors are classified for the retry policy: network failures, 5xx and 429
responses raise `TransientError`, other 4xx responses raise `PermanentError`.
"""

import asyncio
from datetime import datetime
import logging
from pathlib import Path
from typing import Any

import requests

from . import __version__
from .exceptions import (
    ArtifactNotFoundError,
    PermanentError,
    PublishError,
    RunNotFoundError,
    TransientError,
)
from .models import ArtifactHandle

_LOGGER = logging.getLogger(__name__)

__all__ = ["ArtifactClient"]

API_VERSION = "2022-11-28"
USER_AGENT = f"GithubArtifactSync/{__version__}"
CHUNK_SIZE = 65536
_TIMEOUT = 30.0


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _check_response(response: requests.Response, what: str) -> None:
    """Raise the classified error for an unsuccessful response."""
    if response.ok:
        return
    status = response.status_code
    message = f"{what} failed with HTTP {status}"
    if status >= 500 or status == 429:
        raise TransientError(message, status_code=status)
    raise PermanentError(message, status_code=status)


def _content_length(response: requests.Response) -> int | None:
    """Return the announced body size, if it can be compared to the bytes read."""
    if response.headers.get("Content-Encoding"):
        # iter_content decodes the body, so the lengths differ
        return None
    try:
        return int(response.headers["Content-Length"])
    except (KeyError, ValueError):
        return None


class ArtifactClient:
    """Authenticated access to workflow runs and their artifacts."""

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        session: requests.Session | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": USER_AGENT,
                "Authorization": f"Bearer {token}",
            }
        )

    def close(self) -> None:
        self._session.close()

    def _get_json(self, path: str, params: dict[str, Any], what: str) -> dict[str, Any]:
        url = f"{self._api_url}{path}"
        _LOGGER.debug("GET %s %s", url, params)
        try:
            response = self._session.get(url, params=params, timeout=_TIMEOUT)
        except requests.RequestException as err:
            raise TransientError(f"{what} failed: {err}") from err
        _check_response(response, what)
        try:
            body = response.json()
        except ValueError as err:
            raise TransientError(f"{what} returned an unintelligible body") from err
        if not isinstance(body, dict):
            raise TransientError(f"{what} returned an unintelligible body")
        return body

    def _find_latest_run(
        self, owner: str, repo: str, branch: str, commit_sha: str
    ) -> int:
        body = self._get_json(
            f"/repos/{owner}/{repo}/actions/runs",
            {
                "branch": branch,
                "head_sha": commit_sha,
                "status": "success",
                "per_page": 100,
            },
            f"Listing runs of {owner}/{repo}@{commit_sha[:12]}",
        )
        runs = [
            run
            for run in body.get("workflow_runs") or []
            if isinstance(run, dict) and run.get("head_sha") == commit_sha
        ]
        if not runs:
            raise RunNotFoundError(
                f"No successful run for {owner}/{repo}@{commit_sha[:12]} yet"
            )
        latest = max(runs, key=lambda run: (run.get("created_at") or "", run["id"]))
        _LOGGER.debug("Latest run for %s is %s", commit_sha[:12], latest["id"])
        return int(latest["id"])

    async def find_latest_run(
        self, owner: str, repo: str, branch: str, commit_sha: str
    ) -> int:
        """Return the id of the newest successful run for a commit.

        Raises:
            RunNotFoundError: No successful run is associated with the commit
                yet, which is expected while the workflow is still running.
        """
        return await asyncio.to_thread(
            self._find_latest_run, owner, repo, branch, commit_sha
        )

    def _resolve_artifact(
        self, owner: str, repo: str, run_id: int, artifact_name: str
    ) -> ArtifactHandle:
        body = self._get_json(
            f"/repos/{owner}/{repo}/actions/runs/{run_id}/artifacts",
            {"name": artifact_name, "per_page": 100},
            f"Listing artifacts of run {run_id}",
        )
        for artifact in body.get("artifacts") or []:
            if not isinstance(artifact, dict) or artifact.get("name") != artifact_name:
                continue
            if artifact.get("expired"):
                raise ArtifactNotFoundError(
                    f"Artifact '{artifact_name}' of run {run_id} has expired"
                )
            try:
                return ArtifactHandle(
                    run_id=run_id,
                    artifact_id=int(artifact["id"]),
                    name=artifact_name,
                    size=int(artifact["size_in_bytes"]),
                    download_url=artifact["archive_download_url"],
                    expires_at=_parse_time(artifact.get("expires_at")),
                )
            except (KeyError, TypeError, ValueError) as err:
                raise TransientError(
                    f"Artifact '{artifact_name}' of run {run_id} is missing {err}"
                ) from err
        raise ArtifactNotFoundError(
            f"Run {run_id} did not produce an artifact named '{artifact_name}'"
        )

    async def resolve_artifact(
        self, owner: str, repo: str, run_id: int, artifact_name: str
    ) -> ArtifactHandle:
        """Return a download handle for the named artifact of a run.

        Raises:
            ArtifactNotFoundError: The run did not produce the artifact or it
                has expired.
        """
        return await asyncio.to_thread(
            self._resolve_artifact, owner, repo, run_id, artifact_name
        )

    def _download(self, handle: ArtifactHandle, destination: Path) -> int:
        what = f"Downloading artifact {handle.artifact_id}"
        written = 0
        try:
            # The redirect to blob storage drops the Authorization header
            with self._session.get(
                handle.download_url, stream=True, timeout=_TIMEOUT
            ) as response:
                _check_response(response, what)
                expected = _content_length(response)
                with destination.open("wb") as archive:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            archive.write(chunk)
                            written += len(chunk)
                if expected is not None and written < expected:
                    raise TransientError(
                        f"{what} ended after {written} of {expected} bytes"
                    )
        except requests.RequestException as err:
            raise TransientError(f"{what} failed: {err}") from err
        except OSError as err:
            raise PublishError(f"Unable to write {destination}: {err}") from err
        _LOGGER.debug("Downloaded %d bytes to %s", written, destination)
        return written

    async def download(self, handle: ArtifactHandle, destination: Path) -> int:
        """Stream the artifact archive to `destination`, returning its size."""
        return await asyncio.to_thread(self._download, handle, destination)
