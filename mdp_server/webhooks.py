"""
GitHub webhook ingest.

Verifies delivery signatures against the installation's stored secret and
turns events into state changes:

- ``push`` enqueues a pending build job routed through the registered
  repository (service, environment, compose path)
- ``installation_repositories`` keeps repository records in sync with what
  the installation can access

Deliveries are not deduplicated: a redelivered push creates another job.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from mdp_common.errors import NotFoundError, SignatureError
from mdp_common.ids import new_id, repository_id, split_repo_full_name
from mdp_common.models import (
    DEFAULT_ENVIRONMENT,
    JOB_PENDING,
    BuildJob,
    Installation,
    Repository,
)
from mdp_common.repository import StateRepository

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
DEFAULT_COMPOSE_PATH = "docker-compose.yml"


def compute_signature(body: bytes, secret: str) -> str:
    """Return the ``X-Hub-Signature-256`` header value for a body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(signature_header: str | None, body: bytes, secret: str) -> None:
    """
    Verify an HMAC-SHA256 webhook signature over the raw request body.

    Args:
        signature_header: Value of the X-Hub-Signature-256 header
        body: Raw request body exactly as received
        secret: Shared webhook secret

    Raises:
        SignatureError: If the header is missing, malformed or does not match
    """
    if not signature_header:
        raise SignatureError("missing signature header")
    if not signature_header.startswith(SIGNATURE_PREFIX):
        raise SignatureError("unexpected signature format")
    try:
        provided = bytes.fromhex(signature_header[len(SIGNATURE_PREFIX) :])
    except ValueError as e:
        raise SignatureError(f"decode signature: {e}") from e
    expected = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, provided):
        raise SignatureError("signature mismatch")


@dataclass
class PushEvent:
    repository: str
    ref: str
    after: str


@dataclass
class RepoInfo:
    full_name: str
    owner: str
    name: str
    default_branch: str = "main"

    def owner_and_name(self) -> tuple[str, str]:
        """Resolve owner and name, falling back to the full name."""
        owner, name = self.owner.strip(), self.name.strip()
        if (not owner or not name) and self.full_name:
            parts = self.full_name.split("/")
            if len(parts) == 2:
                owner = owner or parts[0].strip()
                name = name or parts[1].strip()
        return owner, name


@dataclass
class InstallationReposEvent:
    action: str
    existing: list[RepoInfo] = field(default_factory=list)
    added: list[RepoInfo] = field(default_factory=list)
    removed: list[RepoInfo] = field(default_factory=list)


def _load_object(body: bytes) -> dict[str, Any]:
    payload = json.loads(body)
    if not isinstance(payload, dict):
        raise ValueError("webhook payload is not a JSON object")
    return payload


def _object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _objects(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def extract_installation_id(body: bytes) -> str:
    """Read ``installation.id`` from a payload, or return "" if absent."""
    try:
        payload = _load_object(body)
    except ValueError:
        return ""
    external_id = _object(payload.get("installation")).get("id")
    return str(external_id) if external_id else ""


def parse_push_event(body: bytes) -> PushEvent:
    """
    Extract repository, ref and head commit from a push payload.

    Fields of the wrong type are treated as absent.

    Raises:
        ValueError: If the body is not a JSON object
    """
    payload = _load_object(body)
    repo = _object(payload.get("repository"))
    full_name = _text(repo.get("full_name"))
    owner_login = _text(_object(repo.get("owner")).get("login"))
    name = _text(repo.get("name"))
    if not full_name and owner_login and name:
        full_name = f"{owner_login}/{name}"
    return PushEvent(
        repository=full_name,
        ref=_text(payload.get("ref")),
        after=_text(payload.get("after")),
    )


def _repo_info(raw: dict[str, Any]) -> RepoInfo:
    owner = _text(_object(raw.get("owner")).get("login"))
    name = _text(raw.get("name"))
    full_name = _text(raw.get("full_name"))
    if not full_name and owner and name:
        full_name = f"{owner}/{name}"
    return RepoInfo(
        full_name=full_name,
        owner=owner,
        name=name,
        default_branch=_text(raw.get("default_branch")) or "main",
    )


def parse_installation_repos_event(body: bytes) -> InstallationReposEvent:
    """
    Extract the repository lists from an installation_repositories payload.

    Raises:
        ValueError: If the body is not a JSON object
    """
    payload = _load_object(body)
    return InstallationReposEvent(
        action=_text(payload.get("action")),
        existing=[_repo_info(r) for r in _objects(payload.get("repositories"))],
        added=[_repo_info(r) for r in _objects(payload.get("repositories_added"))],
        removed=[_repo_info(r) for r in _objects(payload.get("repositories_removed"))],
    )


async def authenticate_delivery(
    repository: StateRepository,
    installation_external_id: str,
    signature: str | None,
    body: bytes,
) -> Installation | None:
    """
    Check a delivery's signature against its installation.

    An installation with a stored secret requires a valid signature. A
    signature that cannot be checked (unknown installation or no stored
    secret) is rejected rather than ignored. Unsigned deliveries for
    installations without a secret are accepted.

    Returns:
        The matching installation, if one is registered

    Raises:
        SignatureError: If the delivery must be rejected
    """
    installation = None
    if installation_external_id:
        try:
            installation = await repository.find_installation_by_external_id(
                installation_external_id
            )
        except NotFoundError:
            installation = None

    if installation is not None and installation.webhook_secret:
        verify_signature(signature, body, installation.webhook_secret)
    elif signature:
        logger.warning(
            f"[webhook] signature provided but no secret registered for installation "
            f"{installation_external_id or '(none)'}"
        )
        raise SignatureError("signature cannot be verified: no secret registered")
    return installation


async def enqueue_push_build(
    repository: StateRepository, event: PushEvent, installation_external_id: str
) -> BuildJob | None:
    """Create a pending build job for a push, routed via the registered repository."""
    if not event.repository or not event.after:
        return None

    job = BuildJob(
        id=new_id(),
        repository=event.repository,
        ref=event.ref,
        commit=event.after,
        installation=installation_external_id,
        status=JOB_PENDING,
    )
    try:
        owner, name = split_repo_full_name(event.repository)
    except ValueError as e:
        logger.warning(f"[webhook] {e}")
    else:
        try:
            repo = await repository.get_repository(repository_id(owner, name))
        except NotFoundError:
            repo = None
        if repo is not None:
            job.service_id = repo.service_id
            if repo.environment:
                job.environment = repo.environment
            elif repo.service_id:
                job.environment = DEFAULT_ENVIRONMENT
            job.compose_path = repo.compose_path

    return await repository.create_build_job(job)


async def sync_installation_repositories(
    repository: StateRepository,
    event: InstallationReposEvent,
    installation_external_id: str,
) -> None:
    """Upsert existing and added repositories, delete removed ones."""
    for info in [*event.existing, *event.added]:
        owner, name = info.owner_and_name()
        if not owner or not name:
            continue
        await repository.upsert_repository(
            Repository(
                id=repository_id(owner, name),
                owner=owner,
                name=name,
                default_branch=info.default_branch,
                compose_path=DEFAULT_COMPOSE_PATH,
                installation_id=installation_external_id,
            )
        )

    for info in event.removed:
        owner, name = info.owner_and_name()
        if not owner or not name:
            continue
        try:
            await repository.delete_repository(repository_id(owner, name))
        except NotFoundError:
            pass


async def handle_delivery(
    repository: StateRepository,
    event: str,
    delivery_id: str,
    installation_header: str,
    signature: str | None,
    body: bytes,
) -> dict[str, Any]:
    """
    Authenticate and process one webhook delivery.

    Args:
        repository: State repository
        event: X-GitHub-Event header
        delivery_id: X-GitHub-Delivery header
        installation_header: X-GitHub-Installation-Id header (may be empty)
        signature: X-Hub-Signature-256 header (may be None)
        body: Raw request body

    Returns:
        Response document describing what was accepted

    Raises:
        SignatureError: If the delivery fails signature checks
    """
    installation_external_id = installation_header or extract_installation_id(body)
    await authenticate_delivery(repository, installation_external_id, signature, body)

    response: dict[str, Any] = {
        "status": "accepted",
        "event": event,
        "delivery_id": delivery_id,
        "installation_id": installation_external_id,
    }

    if event == "push":
        try:
            push = parse_push_event(body)
        except ValueError as e:
            logger.warning(f"[webhook] failed to parse push payload: {e}")
            return response
        response.update(repository=push.repository, ref=push.ref, commit=push.after)
        job = await enqueue_push_build(repository, push, installation_external_id)
        if job is not None:
            response["build_job_id"] = job.id
            logger.info(
                f"[webhook] queued build job {job.id} for {push.repository}@{push.after}"
            )
    elif event == "installation_repositories":
        try:
            info = parse_installation_repos_event(body)
        except ValueError as e:
            logger.warning(
                f"[webhook] failed to parse installation_repositories payload: {e}"
            )
            return response
        response.update(
            action=info.action,
            repositories=[r.full_name for r in info.existing],
            added=[r.full_name for r in info.added],
            removed=[r.full_name for r in info.removed],
        )
        await sync_installation_repositories(repository, info, installation_external_id)
    else:
        logger.info(f"[webhook] received {event} event (delivery {delivery_id})")

    return response
