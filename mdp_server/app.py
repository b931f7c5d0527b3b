"""
Control-plane HTTP API.

Exposes the desired-state store over HTTP for operators (mdp-admin), host
agents (service state, Traefik configuration) and build workers (job claim
and status reporting), and ingests GitHub webhooks.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mdp_common.errors import (
    AlreadyExistsError,
    MDPError,
    NoJobAvailable,
    NotFoundError,
    PersistenceError,
    SignatureError,
    ValidationError,
)
from mdp_common.ids import installation_id, new_id, repository_id, slugify
from mdp_common.models import (
    DEFAULT_ENVIRONMENT,
    BuildJob,
    Deployment,
    Domain,
    Installation,
    Project,
    Repository,
    Service,
)
from mdp_common.repository import StateRepository
from mdp_persistence.json_store import JSONStateStore

from . import webhooks
from .auth import create_require_token_dependency
from .schemas import (
    BuildJobCreate,
    BuildJobPatch,
    ClaimRequest,
    ComposeUpdate,
    DeploymentCreate,
    DomainCreate,
    InstallationRegister,
    ProjectCreate,
    RepositoryRegister,
    ServiceCreate,
)
from .traefik import DEFAULT_CERT_RESOLVER, render_traefik_config

logger = logging.getLogger(__name__)

# Global instance (initialized at startup)
repository: StateRepository | None = None


def get_state_path() -> str:
    """
    Get the state file path from environment or use default.

    Environment variables:
    - MDP_STATE_PATH: Path of the JSON snapshot file
    """
    return os.environ.get("MDP_STATE_PATH", "./data/state.json")


def get_api_token() -> str | None:
    """
    Get the API bearer token from environment.

    Environment variables:
    - MDP_API_TOKEN: Shared bearer token; unset disables authentication
    """
    return os.environ.get("MDP_API_TOKEN") or None


def get_cert_resolver() -> str:
    """
    Get the Traefik certificate resolver name.

    Environment variables:
    - MDP_CERT_RESOLVER: Resolver referenced by every router (default: le)
    """
    return os.environ.get("MDP_CERT_RESOLVER", DEFAULT_CERT_RESOLVER)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Loads the state snapshot on startup and releases the store on shutdown.
    """
    global repository

    state_path = get_state_path()
    store = JSONStateStore(state_path)
    await store.initialize()
    repository = store
    logger.info(f"Control plane state loaded from {state_path}")

    yield

    await store.close()
    repository = None


app = FastAPI(title="mdp control plane", lifespan=lifespan)


def get_repository() -> StateRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If the repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


require_token = create_require_token_dependency(get_api_token)
api = APIRouter(prefix="/v1", dependencies=[Depends(require_token)])


# ============================================================================
# Error mapping
# ============================================================================

ERROR_STATUS: dict[type[MDPError], int] = {
    NotFoundError: 404,
    AlreadyExistsError: 409,
    ValidationError: 400,
    SignatureError: 401,
    PersistenceError: 500,
}


@app.exception_handler(MDPError)
async def handle_platform_error(request: Request, exc: MDPError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def handle_invalid_body(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "invalid json"})


# ============================================================================
# Health
# ============================================================================


@app.get("/healthz")
async def health_check() -> dict[str, str]:
    """Health check endpoint (no authentication required)."""
    return {"status": "ok"}


# ============================================================================
# Projects and services
# ============================================================================


@api.get("/projects")
async def list_projects(
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    projects = await repo.list_projects()
    return {"projects": [p.to_dict() for p in projects]}


@api.post("/projects", status_code=201)
async def create_project(
    payload: ProjectCreate,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    name = payload.name.strip()
    if not name:
        raise ValidationError("name required")
    project = Project(id=new_id(), name=name, slug=payload.slug or slugify(name))
    created = await repo.create_project(project)
    return created.to_dict()


@api.get("/projects/{project_id}")
async def get_project(
    project_id: str,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    project = await repo.get_project(project_id)
    services = await repo.list_services(project_id)
    return {
        "project": project.to_dict(),
        "services": [s.to_dict() for s in services],
    }


@api.get("/projects/{project_id}/services")
async def list_project_services(
    project_id: str,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    services = await repo.list_services(project_id)
    return {"services": [s.to_dict() for s in services]}


@api.post("/projects/{project_id}/services", status_code=201)
async def create_service(
    project_id: str,
    payload: ServiceCreate,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    if not payload.name.strip():
        raise ValidationError("name required")
    if payload.internal_port < 0 or payload.internal_port > 65535:
        raise ValidationError("internal_port must be between 1 and 65535")
    service = Service(
        id=new_id(),
        project_id=project_id,
        name=payload.name.strip(),
        image=payload.image.strip(),
        internal_port=payload.internal_port or 80,
    )
    created = await repo.create_service(service)
    return created.to_dict()


@api.get("/services/{service_id}")
async def get_service(
    service_id: str,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    service = await repo.get_service(service_id)
    return service.to_dict()


@api.get("/services/{service_id}/domains")
async def list_domains(
    service_id: str,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    service = await repo.get_service(service_id)
    return {"domains": [d.to_dict() for d in service.domains]}


@api.post("/services/{service_id}/domains", status_code=201)
async def add_domain(
    service_id: str,
    payload: DomainCreate,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    hostname = payload.hostname.strip()
    if not hostname:
        raise ValidationError("hostname required")
    domain = Domain(
        id=new_id(),
        service_id=service_id,
        environment=payload.environment.strip() or DEFAULT_ENVIRONMENT,
        hostname=hostname,
    )
    created = await repo.add_domain(service_id, domain)
    return created.to_dict()


@api.get("/services/{service_id}/deployments")
async def list_deployments(
    service_id: str,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    service = await repo.get_service(service_id)
    return {"deployments": [d.to_dict() for d in service.deployments]}


@api.post("/services/{service_id}/deployments", status_code=201)
async def set_deployment(
    service_id: str,
    payload: DeploymentCreate,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    """Set the desired image for an environment, replacing any previous deployment."""
    image = payload.image.strip()
    if not image:
        raise ValidationError("image required")
    deployment = Deployment(
        id=new_id(),
        service_id=service_id,
        environment=payload.environment.strip() or DEFAULT_ENVIRONMENT,
        image=image,
    )
    created = await repo.set_deployment(service_id, deployment)
    logger.info(
        f"Service {service_id} {created.environment} deployment set to {created.image}"
    )
    return created.to_dict()


@api.get("/service-compose/{service_id}")
async def get_compose(
    service_id: str,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, str]:
    service = await repo.get_service(service_id)
    return {"compose": service.compose}


@api.api_route("/service-compose/{service_id}", methods=["PUT", "POST"])
async def set_compose(
    service_id: str,
    payload: ComposeUpdate,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, str]:
    await repo.set_compose(service_id, payload.compose)
    return {"status": "ok"}


@api.get("/state/services")
async def service_state(
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    """Desired service list consumed by reconciliation agents."""
    services = await repo.list_services()
    services.sort(key=lambda s: (s.project_id, s.id))
    return {"services": [s.to_state_dict() for s in services]}


@api.get("/traefik/config")
async def traefik_config(
    repo: StateRepository = Depends(get_repository),
    cert_resolver: str = Depends(get_cert_resolver),
) -> Response:
    services = await repo.list_services()
    return Response(
        content=render_traefik_config(services, cert_resolver),
        media_type="application/x-yaml",
    )


# ============================================================================
# GitHub repositories and installations
# ============================================================================


@api.get("/github/repos")
async def list_repositories(
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    repos = await repo.list_repositories()
    return {"repositories": [r.to_dict() for r in repos]}


@api.post("/github/repos", status_code=201)
async def register_repository(
    payload: RepositoryRegister,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    owner, name = payload.owner.strip(), payload.name.strip()
    if not owner or not name:
        raise ValidationError("owner and name required")
    record = Repository(
        id=repository_id(owner, name),
        owner=owner,
        name=name,
        default_branch=payload.default_branch or "main",
        compose_path=payload.compose_path or webhooks.DEFAULT_COMPOSE_PATH,
        installation_id=payload.installation_id.strip(),
        service_id=payload.service_id.strip(),
        environment=payload.environment.strip(),
    )
    stored = await repo.upsert_repository(record)
    return stored.to_dict()


@api.get("/github/installations")
async def list_installations(
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    installations = await repo.list_installations()
    return {
        "installations": [i.to_dict(include_secret=False) for i in installations]
    }


@api.post("/github/installations", status_code=201)
async def register_installation(
    payload: InstallationRegister,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    account, external_id = payload.account.strip(), payload.external_id.strip()
    if not account or not external_id:
        raise ValidationError("account and external_id required")
    installation = Installation(
        id=installation_id(account, external_id),
        account=account,
        external_id=external_id,
        webhook_secret=payload.webhook_secret,
    )
    stored = await repo.upsert_installation(installation)
    return stored.to_dict(include_secret=False)


@app.post("/v1/github/webhook", status_code=202)
async def github_webhook(
    request: Request,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Ingest a GitHub webhook delivery.

    Authenticated by the installation's webhook signature instead of the
    bearer token.
    """
    body = await request.body()
    return await webhooks.handle_delivery(
        repo,
        event=request.headers.get("X-GitHub-Event", ""),
        delivery_id=request.headers.get("X-GitHub-Delivery", ""),
        installation_header=request.headers.get("X-GitHub-Installation-Id", ""),
        signature=request.headers.get("X-Hub-Signature-256"),
        body=body,
    )


# ============================================================================
# Build jobs
# ============================================================================


@api.get("/build-jobs")
async def list_build_jobs(
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    jobs = await repo.list_build_jobs()
    return {"build_jobs": [j.to_dict() for j in jobs]}


@api.post("/build-jobs", status_code=201)
async def create_build_job(
    payload: BuildJobCreate,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    if not payload.repository.strip() or not payload.commit.strip():
        raise ValidationError("repository and commit required")
    job = BuildJob(
        id=new_id(),
        repository=payload.repository.strip(),
        ref=payload.ref,
        commit=payload.commit.strip(),
        installation=payload.installation,
        status=payload.status,
        service_id=payload.service_id,
        environment=payload.environment,
        artifacts=list(payload.artifacts or []),
        compose_path=payload.compose_path,
    )
    created = await repo.create_build_job(job)
    return created.to_dict()


@api.post("/build-jobs/claim", response_model=None)
async def claim_build_job(
    payload: ClaimRequest | None = None,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any] | Response:
    """
    Claim the oldest pending build job.

    Returns the job, now running, or 204 No Content when the queue is empty.
    """
    worker = (payload.worker if payload else "").strip() or f"worker-{new_id()}"
    try:
        job = await repo.claim_next_pending(worker)
    except NoJobAvailable:
        return Response(status_code=204)
    return job.to_dict()


@api.get("/build-jobs/{job_id}")
async def get_build_job(
    job_id: str,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    job = await repo.get_build_job(job_id)
    return job.to_dict()


@api.api_route("/build-jobs/{job_id}", methods=["PATCH", "POST"])
async def update_build_job(
    job_id: str,
    payload: BuildJobPatch,
    repo: StateRepository = Depends(get_repository),
) -> dict[str, Any]:
    job = await repo.patch_build_job(
        job_id,
        status=payload.status,
        reason=payload.reason,
        artifacts=payload.artifacts,
        compose_path=payload.compose_path,
    )
    return job.to_dict()


app.include_router(api)
