"""
Abstract repository interface for desired-state persistence.

This module defines the contract that any state store implementation must
follow. The control-plane API only talks to this interface, so the JSON
snapshot store can be swapped for another backend without touching routes.
"""

from abc import ABC, abstractmethod

from .models import (
    BuildJob,
    Deployment,
    Domain,
    Installation,
    Project,
    Repository,
    Service,
)


class StateRepository(ABC):
    """
    Abstract base class for desired-state storage operations.

    Implementations must make every operation atomic and linearizable with
    respect to every other operation, and must hand out independent copies so
    that callers can never mutate stored state.
    """

    # Project methods

    @abstractmethod
    async def create_project(self, project: Project) -> Project:
        """
        Store a new project.

        Args:
            project: Project to persist (created_at is assigned by the store)

        Returns:
            Copy of the stored project

        Raises:
            AlreadyExistsError: If a project with the same ID exists
            PersistenceError: If the snapshot could not be written
        """

    @abstractmethod
    async def get_project(self, project_id: str) -> Project:
        """
        Retrieve a project by its ID.

        Raises:
            NotFoundError: If the project does not exist
        """

    @abstractmethod
    async def list_projects(self) -> list[Project]:
        """List all projects."""

    # Service methods

    @abstractmethod
    async def create_service(self, service: Service) -> Service:
        """
        Store a new service under an existing project.

        Raises:
            AlreadyExistsError: If a service with the same ID exists
            NotFoundError: If the owning project does not exist
            PersistenceError: If the snapshot could not be written
        """

    @abstractmethod
    async def get_service(self, service_id: str) -> Service:
        """
        Retrieve a service by its ID, including domains and deployments.

        Raises:
            NotFoundError: If the service does not exist
        """

    @abstractmethod
    async def list_services(self, project_id: str | None = None) -> list[Service]:
        """
        List services, optionally only those of one project.

        Services whose project no longer exists are not listed.
        """

    @abstractmethod
    async def update_service(self, service: Service) -> Service:
        """
        Replace a stored service and refresh its updated_at timestamp.

        Raises:
            NotFoundError: If the service does not exist
            PersistenceError: If the snapshot could not be written
        """

    @abstractmethod
    async def add_domain(self, service_id: str, domain: Domain) -> Domain:
        """
        Append a domain to a service.

        Raises:
            NotFoundError: If the service does not exist
        """

    @abstractmethod
    async def set_deployment(self, service_id: str, deployment: Deployment) -> Deployment:
        """
        Record the desired image of a service in one environment.

        An existing deployment for the same environment is replaced in place;
        the service image is updated to the deployed image.

        Raises:
            NotFoundError: If the service does not exist
        """

    @abstractmethod
    async def set_compose(self, service_id: str, compose: str) -> Service:
        """
        Set (or clear, with an empty string) the inline compose document.

        Raises:
            NotFoundError: If the service does not exist
        """

    # Repository methods

    @abstractmethod
    async def upsert_repository(self, repo: Repository) -> Repository:
        """
        Insert or merge repository metadata.

        Empty service_id, environment, compose_path and installation_id keep
        the previously stored values.
        """

    @abstractmethod
    async def get_repository(self, repo_id: str) -> Repository:
        """
        Retrieve a repository by its ID.

        Raises:
            NotFoundError: If the repository does not exist
        """

    @abstractmethod
    async def list_repositories(self) -> list[Repository]:
        """List all registered repositories."""

    @abstractmethod
    async def delete_repository(self, repo_id: str) -> None:
        """
        Remove a repository record.

        Raises:
            NotFoundError: If the repository does not exist
        """

    # Installation methods

    @abstractmethod
    async def upsert_installation(self, installation: Installation) -> Installation:
        """
        Insert or merge an installation.

        An empty webhook secret keeps the previously stored secret.
        """

    @abstractmethod
    async def list_installations(self) -> list[Installation]:
        """List all installations."""

    @abstractmethod
    async def find_installation_by_external_id(self, external_id: str) -> Installation:
        """
        Look up an installation by its external (GitHub) ID.

        Raises:
            NotFoundError: If no installation has that external ID
        """

    # Build job methods

    @abstractmethod
    async def create_build_job(self, job: BuildJob) -> BuildJob:
        """
        Store a new build job.

        The store owns the lifecycle fields: worker assignment and start and
        completion timestamps are reset regardless of the supplied values.

        Raises:
            AlreadyExistsError: If a job with the same ID exists
            ValidationError: If the status is unknown
        """

    @abstractmethod
    async def get_build_job(self, job_id: str) -> BuildJob:
        """
        Retrieve a build job by its ID.

        Raises:
            NotFoundError: If the job does not exist
        """

    @abstractmethod
    async def list_build_jobs(self) -> list[BuildJob]:
        """List all build jobs ordered by creation time."""

    @abstractmethod
    async def update_build_job(self, job: BuildJob) -> BuildJob:
        """
        Replace a stored build job.

        Entering a terminal status stamps completed_at; leaving one clears it.

        Raises:
            NotFoundError: If the job does not exist
            ValidationError: If the status is unknown
        """

    @abstractmethod
    async def patch_build_job(
        self,
        job_id: str,
        status: str | None = None,
        reason: str | None = None,
        artifacts: list[str] | None = None,
        compose_path: str | None = None,
    ) -> BuildJob:
        """
        Partially update a build job; only non-empty arguments are applied.

        Raises:
            NotFoundError: If the job does not exist
            ValidationError: If the status is unknown
        """

    @abstractmethod
    async def claim_next_pending(self, worker_id: str) -> BuildJob:
        """
        Atomically claim the oldest pending build job for a worker.

        Args:
            worker_id: Identifier of the claiming worker

        Returns:
            Copy of the claimed job, now running

        Raises:
            NoJobAvailable: If no job is pending
            ValidationError: If worker_id is empty
        """
