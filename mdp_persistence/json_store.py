"""
JSON snapshot implementation of the state repository.

All entities live in memory behind a single reader/writer lock. Every
mutation rewrites the complete snapshot to disk (temporary file + fsync +
atomic rename) before it returns, so a crash can never leave a truncated
state file behind.
"""

import asyncio
import contextlib
import copy
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from mdp_common.errors import (
    AlreadyExistsError,
    NoJobAvailable,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from mdp_common.models import (
    DEFAULT_ENVIRONMENT,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    BuildJob,
    Deployment,
    Domain,
    Installation,
    Project,
    Repository,
    Service,
)
from mdp_common.repository import StateRepository

from .locks import ReadWriteLock

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """The complete in-memory state, keyed by entity ID."""

    projects: dict[str, Project] = field(default_factory=dict)
    services: dict[str, Service] = field(default_factory=dict)
    repos: dict[str, Repository] = field(default_factory=dict)
    installations: dict[str, Installation] = field(default_factory=dict)
    build_jobs: dict[str, BuildJob] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "projects": {k: v.to_dict() for k, v in self.projects.items()},
            "services": {k: v.to_dict() for k, v in self.services.items()},
            "repos": {k: v.to_dict() for k, v in self.repos.items()},
            "installations": {
                k: v.to_dict() for k, v in self.installations.items()
            },
            "build_jobs": {k: v.to_dict() for k, v in self.build_jobs.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        # Missing or null maps load as empty
        return cls(
            projects={
                k: Project.from_dict(v)
                for k, v in (data.get("projects") or {}).items()
            },
            services={
                k: Service.from_dict(v)
                for k, v in (data.get("services") or {}).items()
            },
            repos={
                k: Repository.from_dict(v)
                for k, v in (data.get("repos") or {}).items()
            },
            installations={
                k: Installation.from_dict(v)
                for k, v in (data.get("installations") or {}).items()
            },
            build_jobs={
                k: BuildJob.from_dict(v)
                for k, v in (data.get("build_jobs") or {}).items()
            },
        )


def _validate_status(status: str) -> None:
    if status not in JOB_STATUSES:
        raise ValidationError(
            f"invalid build job status {status!r} (expected one of {', '.join(JOB_STATUSES)})"
        )


def _apply_completion(job: BuildJob, previous_status: str | None, now: datetime) -> None:
    """Stamp or clear completed_at according to the job's new status."""
    if job.status in TERMINAL_JOB_STATUSES:
        if job.completed_at is None or previous_status != job.status:
            job.completed_at = now
    else:
        job.completed_at = None


async def _settle(write: asyncio.Task) -> bool:
    """Wait for a snapshot write to finish; True if it succeeded."""
    while not write.done():
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            continue
        except Exception:
            break
    return not write.cancelled() and write.exception() is None


class JSONStateStore(StateRepository):
    """
    State repository persisted as a single JSON document.

    The document has top-level maps ``projects``, ``services``, ``repos``,
    ``installations`` and ``build_jobs``, each keyed by entity ID.
    """

    def __init__(self, path: str | Path = "./data/state.json"):
        """
        Initialize the store.

        Args:
            path: Location of the JSON snapshot file
        """
        self.path = Path(path)
        self._lock = ReadWriteLock()
        self._state = Snapshot()
        self._last_timestamp: datetime | None = None

    # ------------------------------------------------------------------
    # Lifecycle and persistence
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Load the snapshot from disk, creating an empty one if it is missing.

        Raises:
            PersistenceError: If the file exists but cannot be read or parsed
        """
        async with self._lock.write():
            await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
            try:
                raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
            except FileNotFoundError:
                logger.info(f"No state file at {self.path}, starting empty")
                self._state = Snapshot()
                await self._persist()
                return
            except OSError as e:
                raise PersistenceError(f"failed to read state file {self.path}: {e}") from e

            if not raw.strip():
                self._state = Snapshot()
                return

            try:
                self._state = Snapshot.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise PersistenceError(f"invalid state file {self.path}: {e}") from e

            stamps = [
                ts
                for job in self._state.build_jobs.values()
                for ts in (job.created_at, job.updated_at)
                if ts is not None
            ]
            self._last_timestamp = max(stamps) if stamps else None
            logger.info(
                f"Loaded state from {self.path}: {len(self._state.projects)} projects, "
                f"{len(self._state.services)} services, "
                f"{len(self._state.build_jobs)} build jobs"
            )

    async def close(self) -> None:
        """Nothing to release; every mutation is already on disk."""

    def _now(self) -> datetime:
        """Return a UTC timestamp strictly later than any issued before."""
        now = datetime.now(UTC)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _write_snapshot(self, payload: str) -> None:
        """Write payload to a temp file in the same directory and rename it over the target."""
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

    async def _persist(self) -> None:
        """Serialize the current state and write it to disk. Caller holds the write lock."""
        try:
            payload = json.dumps(self._state.to_dict(), indent=2, sort_keys=True)
            await asyncio.to_thread(self._write_snapshot, payload)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"failed to write state file {self.path}: {e}") from e

    @contextlib.asynccontextmanager
    async def _mutation(self) -> AsyncIterator[Snapshot]:
        """
        Run a mutation as one critical section.

        The body mutates the yielded snapshot; on exit the snapshot is
        persisted. If the body or the write fails, the in-memory state and the
        timestamp clock are restored to what they were before the mutation.

        The write thread cannot be interrupted, so a caller cancelled during
        the write waits for it to settle: the mutation is kept when the
        snapshot reached disk and rolled back otherwise.
        """
        async with self._lock.write():
            backup = copy.deepcopy(self._state)
            last_timestamp = self._last_timestamp
            write: asyncio.Task | None = None
            try:
                yield self._state
                write = asyncio.ensure_future(self._persist())
                await asyncio.shield(write)
            except asyncio.CancelledError:
                if write is None or not await _settle(write):
                    self._state = backup
                    self._last_timestamp = last_timestamp
                raise
            except BaseException:
                self._state = backup
                self._last_timestamp = last_timestamp
                raise

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(self, project: Project) -> Project:
        async with self._mutation() as state:
            if project.id in state.projects:
                raise AlreadyExistsError(f"project {project.id} already exists")
            stored = copy.deepcopy(project)
            stored.created_at = self._now()
            state.projects[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_project(self, project_id: str) -> Project:
        async with self._lock.read():
            project = self._state.projects.get(project_id)
            if project is None:
                raise NotFoundError(f"project {project_id} not found")
            return copy.deepcopy(project)

    async def list_projects(self) -> list[Project]:
        async with self._lock.read():
            return [copy.deepcopy(p) for p in self._state.projects.values()]

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def create_service(self, service: Service) -> Service:
        async with self._mutation() as state:
            if service.id in state.services:
                raise AlreadyExistsError(f"service {service.id} already exists")
            if service.project_id not in state.projects:
                raise NotFoundError(f"project {service.project_id} not found")
            stored = copy.deepcopy(service)
            now = self._now()
            stored.created_at = now
            stored.updated_at = now
            state.services[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_service(self, service_id: str) -> Service:
        async with self._lock.read():
            service = self._state.services.get(service_id)
            if service is None:
                raise NotFoundError(f"service {service_id} not found")
            return copy.deepcopy(service)

    async def list_services(self, project_id: str | None = None) -> list[Service]:
        async with self._lock.read():
            return [
                copy.deepcopy(svc)
                for svc in self._state.services.values()
                if svc.project_id in self._state.projects
                and (project_id is None or svc.project_id == project_id)
            ]

    async def update_service(self, service: Service) -> Service:
        async with self._mutation() as state:
            existing = state.services.get(service.id)
            if existing is None:
                raise NotFoundError(f"service {service.id} not found")
            stored = copy.deepcopy(service)
            stored.created_at = existing.created_at
            stored.updated_at = self._now()
            state.services[stored.id] = stored
        return copy.deepcopy(stored)

    def _require_service(self, state: Snapshot, service_id: str) -> Service:
        service = state.services.get(service_id)
        if service is None:
            raise NotFoundError(f"service {service_id} not found")
        return service

    async def add_domain(self, service_id: str, domain: Domain) -> Domain:
        async with self._mutation() as state:
            service = self._require_service(state, service_id)
            stored = copy.deepcopy(domain)
            stored.service_id = service_id
            stored.environment = stored.environment or DEFAULT_ENVIRONMENT
            stored.created_at = self._now()
            service.domains.append(stored)
            service.updated_at = stored.created_at
        return copy.deepcopy(stored)

    async def set_deployment(self, service_id: str, deployment: Deployment) -> Deployment:
        async with self._mutation() as state:
            service = self._require_service(state, service_id)
            stored = copy.deepcopy(deployment)
            stored.service_id = service_id
            stored.environment = stored.environment or DEFAULT_ENVIRONMENT
            stored.created_at = self._now()
            for index, existing in enumerate(service.deployments):
                if existing.environment == stored.environment:
                    service.deployments[index] = stored
                    break
            else:
                service.deployments.append(stored)
            service.image = stored.image
            service.updated_at = stored.created_at
        return copy.deepcopy(stored)

    async def set_compose(self, service_id: str, compose: str) -> Service:
        async with self._mutation() as state:
            service = self._require_service(state, service_id)
            service.compose = compose
            service.updated_at = self._now()
            result = copy.deepcopy(service)
        return result

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    async def upsert_repository(self, repo: Repository) -> Repository:
        async with self._mutation() as state:
            stored = copy.deepcopy(repo)
            now = self._now()
            existing = state.repos.get(stored.id)
            if existing is not None:
                stored.created_at = existing.created_at
                stored.service_id = stored.service_id or existing.service_id
                stored.environment = stored.environment or existing.environment
                stored.compose_path = stored.compose_path or existing.compose_path
                stored.installation_id = (
                    stored.installation_id or existing.installation_id
                )
            else:
                stored.created_at = now
            stored.updated_at = now
            state.repos[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_repository(self, repo_id: str) -> Repository:
        async with self._lock.read():
            repo = self._state.repos.get(repo_id)
            if repo is None:
                raise NotFoundError(f"repository {repo_id} not found")
            return copy.deepcopy(repo)

    async def list_repositories(self) -> list[Repository]:
        async with self._lock.read():
            return [copy.deepcopy(r) for r in self._state.repos.values()]

    async def delete_repository(self, repo_id: str) -> None:
        async with self._mutation() as state:
            if repo_id not in state.repos:
                raise NotFoundError(f"repository {repo_id} not found")
            del state.repos[repo_id]

    # ------------------------------------------------------------------
    # Installations
    # ------------------------------------------------------------------

    async def upsert_installation(self, installation: Installation) -> Installation:
        async with self._mutation() as state:
            stored = copy.deepcopy(installation)
            now = self._now()
            existing = state.installations.get(stored.id)
            if existing is not None:
                stored.created_at = existing.created_at
                stored.webhook_secret = stored.webhook_secret or existing.webhook_secret
            else:
                stored.created_at = now
            stored.updated_at = now
            state.installations[stored.id] = stored
        return copy.deepcopy(stored)

    async def list_installations(self) -> list[Installation]:
        async with self._lock.read():
            return [copy.deepcopy(i) for i in self._state.installations.values()]

    async def find_installation_by_external_id(self, external_id: str) -> Installation:
        async with self._lock.read():
            for installation in self._state.installations.values():
                if installation.external_id == external_id:
                    return copy.deepcopy(installation)
        raise NotFoundError(f"installation {external_id} not found")

    # ------------------------------------------------------------------
    # Build jobs
    # ------------------------------------------------------------------

    async def create_build_job(self, job: BuildJob) -> BuildJob:
        async with self._mutation() as state:
            if job.id in state.build_jobs:
                raise AlreadyExistsError(f"build job {job.id} already exists")
            stored = copy.deepcopy(job)
            stored.status = stored.status or JOB_PENDING
            _validate_status(stored.status)
            if stored.service_id and not stored.environment:
                stored.environment = DEFAULT_ENVIRONMENT
            now = self._now()
            stored.created_at = now
            stored.updated_at = now
            stored.started_at = None
            stored.completed_at = None
            _apply_completion(stored, None, now)
            stored.worker_id = ""
            stored.compose_path = stored.compose_path.strip()
            state.build_jobs[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_build_job(self, job_id: str) -> BuildJob:
        async with self._lock.read():
            job = self._state.build_jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"build job {job_id} not found")
            return copy.deepcopy(job)

    async def list_build_jobs(self) -> list[BuildJob]:
        async with self._lock.read():
            jobs = [copy.deepcopy(j) for j in self._state.build_jobs.values()]
        jobs.sort(key=_creation_order)
        return jobs

    async def update_build_job(self, job: BuildJob) -> BuildJob:
        async with self._mutation() as state:
            existing = state.build_jobs.get(job.id)
            if existing is None:
                raise NotFoundError(f"build job {job.id} not found")
            _validate_status(job.status)
            stored = copy.deepcopy(job)
            stored.created_at = existing.created_at
            stored.updated_at = self._now()
            stored.compose_path = stored.compose_path.strip()
            _apply_completion(stored, existing.status, stored.updated_at)
            state.build_jobs[stored.id] = stored
        return copy.deepcopy(stored)

    async def patch_build_job(
        self,
        job_id: str,
        status: str | None = None,
        reason: str | None = None,
        artifacts: list[str] | None = None,
        compose_path: str | None = None,
    ) -> BuildJob:
        async with self._mutation() as state:
            job = state.build_jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"build job {job_id} not found")
            previous_status = job.status
            if status:
                _validate_status(status)
                job.status = status
            if reason:
                job.reason = reason
            if artifacts is not None:
                job.artifacts = list(artifacts)
            if compose_path and compose_path.strip():
                job.compose_path = compose_path.strip()
            job.updated_at = self._now()
            _apply_completion(job, previous_status, job.updated_at)
            result = copy.deepcopy(job)
        return result

    async def claim_next_pending(self, worker_id: str) -> BuildJob:
        if not worker_id:
            raise ValidationError("worker id is required to claim a build job")
        async with self._mutation() as state:
            pending = [j for j in state.build_jobs.values() if j.status == JOB_PENDING]
            if not pending:
                raise NoJobAvailable("no pending build jobs")
            job = min(pending, key=_creation_order)
            job.status = JOB_RUNNING
            job.worker_id = worker_id
            job.started_at = self._now()
            job.updated_at = job.started_at
            result = copy.deepcopy(job)
        logger.info(f"Build job {result.id} claimed by {worker_id}")
        return result


def _creation_order(job: BuildJob) -> tuple[datetime, str]:
    return (job.created_at or datetime.min.replace(tzinfo=UTC), job.id)
