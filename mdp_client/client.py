"""
HTTP client for the control-plane API.

Used by the reconciliation agent, the build worker and the admin CLI. The
client is synchronous (requests); async callers run it in a worker thread.
"""

import logging
from typing import Any

import requests

from mdp_common.errors import ControlPlaneError
from mdp_common.models import BuildJob, Deployment, Service

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:8080"


class ControlPlaneClient:
    """
    Thin wrapper around the control-plane HTTP API.

    Every failure (connection error, non-2xx status, unusable body) surfaces
    as a ControlPlaneError.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        token: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Control-plane base URL (trailing slash ignored)
            token: Optional bearer token sent with every request
            timeout: Per-request timeout in seconds
            session: Optional pre-built session (mainly for tests)
        """
        self.base_url = (base_url or DEFAULT_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(
        self, method: str, path: str, json: Any = None
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(
                method, url, json=json, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise ControlPlaneError(f"{method} {path}: {e}") from e

        if response.status_code >= 300:
            raise ControlPlaneError(
                f"{method} {path} returned {response.status_code}: "
                f"{_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    def _json(self, method: str, path: str, json: Any = None) -> dict[str, Any]:
        response = self._request(method, path, json=json)
        try:
            body = response.json()
        except ValueError as e:
            raise ControlPlaneError(f"{method} {path}: invalid JSON response") from e
        if not isinstance(body, dict):
            raise ControlPlaneError(f"{method} {path}: expected a JSON object")
        return body

    # ------------------------------------------------------------------
    # Agent
    # ------------------------------------------------------------------

    def get_traefik_config(self) -> bytes:
        """Fetch the rendered Traefik dynamic configuration."""
        return self._request("GET", "/v1/traefik/config").content

    def get_desired_services(self) -> list[Service]:
        """
        Fetch the desired service list.

        The response is accepted only as a whole: a missing ``services`` key
        or any entry without an ``id`` rejects the entire list.

        Raises:
            ControlPlaneError: If the request fails or the body is unusable
        """
        body = self._json("GET", "/v1/state/services")
        if "services" not in body:
            raise ControlPlaneError("desired state response has no services")
        raw_services = body["services"] or []
        if not isinstance(raw_services, list):
            raise ControlPlaneError("desired state services is not a list")

        services = []
        for raw in raw_services:
            if not isinstance(raw, dict) or not raw.get("id"):
                raise ControlPlaneError("desired state contains a service without id")
            try:
                services.append(Service.from_dict(raw))
            except (TypeError, ValueError) as e:
                raise ControlPlaneError(f"invalid service {raw['id']}: {e}") from e
        return services

    # ------------------------------------------------------------------
    # Build worker
    # ------------------------------------------------------------------

    def claim_build_job(self, worker: str) -> BuildJob | None:
        """
        Claim the oldest pending build job.

        Returns:
            The claimed job, or None when the queue is empty
        """
        response = self._request(
            "POST", "/v1/build-jobs/claim", json={"worker": worker}
        )
        if response.status_code == 204:
            return None
        try:
            return BuildJob.from_dict(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise ControlPlaneError(f"invalid claim response: {e}") from e

    def patch_build_job(
        self,
        job_id: str,
        status: str | None = None,
        reason: str | None = None,
        artifacts: list[str] | None = None,
        compose_path: str | None = None,
    ) -> BuildJob:
        payload: dict[str, Any] = {}
        if status is not None:
            payload["status"] = status
        if reason is not None:
            payload["reason"] = reason
        if artifacts is not None:
            payload["artifacts"] = artifacts
        if compose_path is not None:
            payload["compose_path"] = compose_path
        body = self._json("PATCH", f"/v1/build-jobs/{job_id}", json=payload)
        return BuildJob.from_dict(body)

    def set_deployment(
        self, service_id: str, image: str, environment: str = ""
    ) -> Deployment:
        body = self._json(
            "POST",
            f"/v1/services/{service_id}/deployments",
            json={"image": image, "environment": environment},
        )
        return Deployment.from_dict(body)

    def set_compose(self, service_id: str, compose: str) -> None:
        self._request(
            "PUT", f"/v1/service-compose/{service_id}", json={"compose": compose}
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_project(self, name: str, slug: str = "") -> dict[str, Any]:
        return self._json("POST", "/v1/projects", json={"name": name, "slug": slug})

    def list_projects(self) -> list[dict[str, Any]]:
        return self._json("GET", "/v1/projects").get("projects") or []

    def create_service(
        self, project_id: str, name: str, image: str = "", internal_port: int = 80
    ) -> dict[str, Any]:
        return self._json(
            "POST",
            f"/v1/projects/{project_id}/services",
            json={"name": name, "image": image, "internal_port": internal_port},
        )

    def list_services(self, project_id: str) -> list[dict[str, Any]]:
        body = self._json("GET", f"/v1/projects/{project_id}/services")
        return body.get("services") or []

    def add_domain(
        self, service_id: str, hostname: str, environment: str = ""
    ) -> dict[str, Any]:
        return self._json(
            "POST",
            f"/v1/services/{service_id}/domains",
            json={"hostname": hostname, "environment": environment},
        )

    def list_repositories(self) -> list[dict[str, Any]]:
        return self._json("GET", "/v1/github/repos").get("repositories") or []

    def register_repository(
        self,
        owner: str,
        name: str,
        default_branch: str = "",
        compose_path: str = "",
        installation_id: str = "",
        service_id: str = "",
        environment: str = "",
    ) -> dict[str, Any]:
        return self._json(
            "POST",
            "/v1/github/repos",
            json={
                "owner": owner,
                "name": name,
                "default_branch": default_branch,
                "compose_path": compose_path,
                "installation_id": installation_id,
                "service_id": service_id,
                "environment": environment,
            },
        )

    def list_installations(self) -> list[dict[str, Any]]:
        body = self._json("GET", "/v1/github/installations")
        return body.get("installations") or []

    def register_installation(
        self, account: str, external_id: str, webhook_secret: str = ""
    ) -> dict[str, Any]:
        return self._json(
            "POST",
            "/v1/github/installations",
            json={
                "account": account,
                "external_id": external_id,
                "webhook_secret": webhook_secret,
            },
        )

    def list_build_jobs(self) -> list[dict[str, Any]]:
        return self._json("GET", "/v1/build-jobs").get("build_jobs") or []

    def update_build_job(
        self, job_id: str, status: str = "", reason: str = ""
    ) -> dict[str, Any]:
        return self.patch_build_job(
            job_id, status=status or None, reason=reason or None
        ).to_dict()


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason or ""
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text.strip()
