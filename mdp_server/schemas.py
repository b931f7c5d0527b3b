"""Request bodies accepted by the control-plane API."""

from pydantic import BaseModel


class ProjectCreate(BaseModel):
    name: str = ""
    slug: str = ""


class ServiceCreate(BaseModel):
    name: str = ""
    image: str = ""
    internal_port: int = 0


class DomainCreate(BaseModel):
    environment: str = ""
    hostname: str = ""


class DeploymentCreate(BaseModel):
    environment: str = ""
    image: str = ""


class ComposeUpdate(BaseModel):
    compose: str = ""


class RepositoryRegister(BaseModel):
    owner: str = ""
    name: str = ""
    default_branch: str = ""
    compose_path: str = ""
    installation_id: str = ""
    service_id: str = ""
    environment: str = ""


class InstallationRegister(BaseModel):
    account: str = ""
    external_id: str = ""
    webhook_secret: str = ""


class BuildJobCreate(BaseModel):
    repository: str = ""
    ref: str = ""
    commit: str = ""
    installation: str = ""
    status: str = ""
    service_id: str = ""
    environment: str = ""
    artifacts: list[str] | None = None
    compose_path: str = ""


class BuildJobPatch(BaseModel):
    """Partial update; omitted or empty fields leave the job unchanged."""

    status: str | None = None
    reason: str | None = None
    artifacts: list[str] | None = None
    compose_path: str | None = None


class ClaimRequest(BaseModel):
    worker: str = ""
