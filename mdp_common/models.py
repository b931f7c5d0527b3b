"""
Data models for the platform's desired state.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism. Each model converts to and
from the JSON shape used both by the HTTP API and by the state snapshot file.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"

JOB_STATUSES = (JOB_PENDING, JOB_RUNNING, JOB_SUCCEEDED, JOB_FAILED)
TERMINAL_JOB_STATUSES = (JOB_SUCCEEDED, JOB_FAILED)

DEFAULT_ENVIRONMENT = "production"


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize an optional timestamp to ISO-8601."""
    return value.isoformat() if value else None


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an optional ISO-8601 timestamp (accepts a trailing "Z")."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class Project:
    """A logical application grouping that owns services."""

    id: str
    name: str
    slug: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            slug=data.get("slug", ""),
            created_at=parse_timestamp(data.get("created_at")),
        )


@dataclass
class Domain:
    """A hostname routed to a service in a named environment."""

    id: str
    service_id: str
    environment: str
    hostname: str
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service_id": self.service_id,
            "environment": self.environment,
            "hostname": self.hostname,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Domain":
        return cls(
            id=data["id"],
            service_id=data.get("service_id", ""),
            environment=data.get("environment", ""),
            hostname=data.get("hostname", ""),
            created_at=parse_timestamp(data.get("created_at")),
        )


@dataclass
class Deployment:
    """The desired image of a service in one environment."""

    id: str
    service_id: str
    environment: str
    image: str
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service_id": self.service_id,
            "environment": self.environment,
            "image": self.image,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Deployment":
        return cls(
            id=data["id"],
            service_id=data.get("service_id", ""),
            environment=data.get("environment", ""),
            image=data.get("image", ""),
            created_at=parse_timestamp(data.get("created_at")),
        )


@dataclass
class Service:
    """
    A deployable unit within a project.

    A service runs either as a single container (``image`` + ``internal_port``)
    or, when ``compose`` holds an inline compose document, as a compose stack.
    ``deployments`` holds at most one entry per environment.
    """

    id: str
    project_id: str
    name: str
    image: str = ""
    internal_port: int = 80
    compose: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    domains: list[Domain] = field(default_factory=list)
    deployments: list[Deployment] = field(default_factory=list)

    @property
    def is_compose(self) -> bool:
        return bool(self.compose.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "image": self.image,
            "internal_port": self.internal_port,
            "compose": self.compose,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "domains": [domain.to_dict() for domain in self.domains],
            "deployments": [d.to_dict() for d in self.deployments],
        }

    def to_state_dict(self) -> dict[str, Any]:
        """Convert to the reduced shape served to reconciliation agents."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "image": self.image,
            "internal_port": self.internal_port,
            "compose": self.compose,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Service":
        return cls(
            id=data["id"],
            project_id=data.get("project_id", ""),
            name=data.get("name", ""),
            image=data.get("image") or "",
            internal_port=int(data.get("internal_port") or 0),
            compose=data.get("compose") or "",
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            domains=[Domain.from_dict(d) for d in data.get("domains") or []],
            deployments=[
                Deployment.from_dict(d) for d in data.get("deployments") or []
            ],
        )


@dataclass
class Repository:
    """
    A source repository linked to the platform.

    Routes webhook-triggered build jobs to a service, environment and compose
    file path.
    """

    id: str
    owner: str
    name: str
    default_branch: str = "main"
    compose_path: str = ""
    installation_id: str = ""
    service_id: str = ""
    environment: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "name": self.name,
            "default_branch": self.default_branch,
            "compose_path": self.compose_path,
            "installation_id": self.installation_id,
            "service_id": self.service_id,
            "environment": self.environment,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Repository":
        return cls(
            id=data["id"],
            owner=data.get("owner", ""),
            name=data.get("name", ""),
            default_branch=data.get("default_branch") or "main",
            compose_path=data.get("compose_path") or "",
            installation_id=data.get("installation_id") or "",
            service_id=data.get("service_id") or "",
            environment=data.get("environment") or "",
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class Installation:
    """
    A GitHub App installation.

    The webhook secret is used to verify inbound webhook signatures and is
    never returned by the HTTP API.
    """

    id: str
    account: str
    external_id: str
    webhook_secret: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self, include_secret: bool = True) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "account": self.account,
            "external_id": self.external_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
        if include_secret:
            result["webhook_secret"] = self.webhook_secret
        else:
            result["has_webhook_secret"] = bool(self.webhook_secret)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Installation":
        return cls(
            id=data["id"],
            account=data.get("account", ""),
            external_id=data.get("external_id", ""),
            webhook_secret=data.get("webhook_secret") or "",
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class BuildJob:
    """
    A unit of asynchronous build work triggered by a repository event.

    Jobs progress through states: pending -> running -> succeeded | failed.
    A terminal job may be moved back to a non-terminal state to re-run it.
    """

    id: str
    repository: str  # owner/name
    commit: str
    ref: str = ""
    installation: str = ""  # installation external id
    status: str = JOB_PENDING
    reason: str = ""
    worker_id: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None
    artifacts: list[str] = field(default_factory=list)
    service_id: str = ""
    environment: str = ""
    compose_path: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "repository": self.repository,
            "ref": self.ref,
            "commit": self.commit,
            "installation": self.installation,
            "status": self.status,
            "reason": self.reason,
            "worker_id": self.worker_id,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "artifacts": list(self.artifacts),
            "service_id": self.service_id,
            "environment": self.environment,
            "compose_path": self.compose_path,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildJob":
        return cls(
            id=data["id"],
            repository=data.get("repository", ""),
            commit=data.get("commit", ""),
            ref=data.get("ref") or "",
            installation=data.get("installation") or "",
            status=data.get("status") or JOB_PENDING,
            reason=data.get("reason") or "",
            worker_id=data.get("worker_id") or "",
            started_at=parse_timestamp(data.get("started_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            artifacts=list(data.get("artifacts") or []),
            service_id=data.get("service_id") or "",
            environment=data.get("environment") or "",
            compose_path=data.get("compose_path") or "",
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )
