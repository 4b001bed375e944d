"""Authentication and parsing of GitHub webhook deliveries."""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
import hashlib
import hmac
import json
import logging
import re
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import AuthenticationError, MalformedPayload
from .models import SyncRequest, utcnow

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "verify_signature",
    "extract_signature",
    "authenticate",
    "parse_delivery",
]

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
SIGNATURE_PREFIX = "sha256="
BRANCH_REF_PREFIX = "refs/heads/"
NULL_SHA = "0" * 40
COMMIT_SHA_RE = re.compile(r"[0-9a-f]{7,64}")


def verify_signature(payload: bytes, secret: bytes, signature: bytes) -> bool:
    """Return True if `signature` is the HMAC-SHA256 of `payload`."""
    expected = hmac.new(secret, payload, hashlib.sha256).digest()
    return hmac.compare_digest(expected, signature)


def extract_signature(headers: Mapping[str, str]) -> bytes | None:
    """Return the decoded signature from the delivery headers, if present."""
    if not (value := headers.get(SIGNATURE_HEADER)):
        return None
    if not value.startswith(SIGNATURE_PREFIX):
        return None
    try:
        return bytes.fromhex(value[len(SIGNATURE_PREFIX) :])
    except ValueError:
        return None


def authenticate(headers: Mapping[str, str], payload: bytes, secret: bytes) -> None:
    """Check the delivery signature against the shared secret.

    Raises:
        AuthenticationError: The signature is missing or does not match.
    """
    if (signature := extract_signature(headers)) is None:
        raise AuthenticationError("The signature is missing or unreadable", missing=True)
    if not verify_signature(payload, secret, signature):
        raise AuthenticationError("The signature does not match the payload")


@dataclass
class Owner(DataClassDictMixin):
    login: str


@dataclass
class Repository(DataClassDictMixin):
    name: str
    owner: Owner


@dataclass
class PushPayload(DataClassDictMixin):
    ref: str
    after: str
    repository: Repository
    deleted: bool = False


@dataclass
class WorkflowRun(DataClassDictMixin):
    head_branch: str | None
    head_sha: str
    status: str
    conclusion: str | None = None
    id: int | None = None


@dataclass
class WorkflowRunPayload(DataClassDictMixin):
    workflow_run: WorkflowRun
    repository: Repository


@dataclass
class WorkflowJob(DataClassDictMixin):
    head_branch: str | None
    head_sha: str
    status: str
    run_id: int | None = None


@dataclass
class WorkflowJobPayload(DataClassDictMixin):
    workflow_job: WorkflowJob
    repository: Repository


def _decode(body: bytes) -> dict[str, Any]:
    try:
        doc = json.loads(body)
    except ValueError as err:
        raise MalformedPayload(f"Payload is not valid JSON: {err}") from err
    if not isinstance(doc, dict):
        raise MalformedPayload("Payload is not a JSON object")
    return doc


def _request(
    event: str,
    branch: str,
    sha: str,
    repository: Repository,
    received_at: datetime | None,
) -> SyncRequest:
    if not isinstance(sha, str) or not sha:
        raise MalformedPayload(f"The {event} payload has no commit sha")
    # The sha becomes part of the output path
    if not COMMIT_SHA_RE.fullmatch(sha):
        raise MalformedPayload(f"The {event} payload has an invalid commit sha {sha!r}")
    return SyncRequest(
        commit_sha=sha,
        branch=branch,
        owner=repository.owner.login,
        repo=repository.name,
        event=event,
        received_at=received_at or utcnow(),
    )


def _from_push(doc: dict[str, Any], received_at: datetime | None) -> SyncRequest | None:
    payload = PushPayload.from_dict(doc)
    if not payload.ref.startswith(BRANCH_REF_PREFIX):
        _LOGGER.info("Push to %s is not a branch, ignoring it", payload.ref)
        return None
    if payload.deleted or payload.after == NULL_SHA:
        _LOGGER.info("Push deleted %s, ignoring it", payload.ref)
        return None
    branch = payload.ref[len(BRANCH_REF_PREFIX) :]
    return _request("push", branch, payload.after, payload.repository, received_at)


def _from_workflow_run(
    doc: dict[str, Any], received_at: datetime | None
) -> SyncRequest | None:
    payload = WorkflowRunPayload.from_dict(doc)
    run = payload.workflow_run
    if run.status != "completed":
        _LOGGER.info("The workflow run isn't completed yet, ignoring it")
        return None
    if run.conclusion != "success":
        _LOGGER.info("The workflow run concluded with %s, ignoring it", run.conclusion)
        return None
    if not run.head_branch:
        _LOGGER.info("The workflow run has no branch, ignoring it")
        return None
    return _request(
        "workflow_run", run.head_branch, run.head_sha, payload.repository, received_at
    )


def _from_workflow_job(
    doc: dict[str, Any], received_at: datetime | None
) -> SyncRequest | None:
    payload = WorkflowJobPayload.from_dict(doc)
    job = payload.workflow_job
    if job.status != "completed":
        _LOGGER.info("The workflow job isn't completed yet, ignoring it")
        return None
    if not job.head_branch:
        _LOGGER.info("The workflow job has no branch, ignoring it")
        return None
    return _request(
        "workflow_job", job.head_branch, job.head_sha, payload.repository, received_at
    )


_PARSERS = {
    "push": _from_push,
    "workflow_run": _from_workflow_run,
    "workflow_job": _from_workflow_job,
}


def parse_delivery(
    event: str | None, body: bytes, received_at: datetime | None = None
) -> SyncRequest | None:
    """Turn a webhook delivery into a sync request.

    Returns None for deliveries that are valid but do not call for a sync,
    such as `ping`, unfinished workflow runs, or tag pushes. Branch filtering
    is left to the caller.

    Raises:
        MalformedPayload: The event header is missing, or the body is not
            JSON or lacks a required field.
    """
    if not event:
        raise MalformedPayload(f"Missing {EVENT_HEADER} header")
    if (parser := _PARSERS.get(event)) is None:
        _LOGGER.info("Event %s does not trigger a sync, ignoring it", event)
        return None
    doc = _decode(body)
    try:
        return parser(doc, received_at)
    except (MissingField, InvalidFieldValue) as err:
        raise MalformedPayload(f"Invalid {event} payload: {err}") from err
