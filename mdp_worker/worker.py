"""
Build worker.

Claims pending build jobs from the control plane, builds a container image
from the job's repository at the pushed commit and reports the outcome. When
the job targets a service, the worker also uploads the repository's compose
file and points the service's deployment at the new image.
"""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from mdp_client.client import ControlPlaneClient
from mdp_common.errors import ControlPlaneError, MDPError, RuntimeCommandError
from mdp_common.ids import split_repo_full_name
from mdp_common.models import JOB_FAILED, JOB_SUCCEEDED, BuildJob

logger = logging.getLogger(__name__)

MASK = "***"


class BuildError(MDPError):
    """A build job could not be turned into an image."""


@dataclass
class BuildResult:
    image: str
    compose: str = ""


class BuildWorker:
    """
    Worker that polls the build queue and executes one job at a time.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        name: str = "builder-local",
        workspace: str | Path = "./worker-tmp",
        registry: str = "",
        github_token: str = "",
        interval: float = 5.0,
        push: bool = False,
        keep_workspace: bool = False,
        git_bin: str = "git",
        docker_bin: str = "docker",
    ):
        """
        Initialize the build worker.

        Args:
            client: Control-plane API client
            name: Worker id reported when claiming jobs
            workspace: Directory holding one checkout per job
            registry: Image name prefix (default: ghcr.io/<owner>)
            github_token: Token used to clone private repositories
            interval: Seconds between claim attempts when the queue is empty
            push: Push built images to the registry
            keep_workspace: Keep job checkouts after the build
        """
        self.client = client
        self.name = name
        self.workspace = Path(workspace)
        self.registry = registry.rstrip("/")
        self.github_token = github_token
        self.interval = interval
        self.push = push
        self.keep_workspace = keep_workspace
        self.git_bin = git_bin
        self.docker_bin = docker_bin

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task:
            logger.warning("Worker already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Build worker {self.name} started")

    async def stop(self) -> None:
        """Stop polling; a job in progress is finished first."""
        if not self._task:
            return
        logger.info("Stopping build worker...")
        self._stop_event.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Build worker stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            claimed = False
            try:
                claimed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)

            if claimed:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> bool:
        """
        Claim and process at most one job.

        Returns:
            True if a job was claimed
        """
        try:
            job = await asyncio.to_thread(self.client.claim_build_job, self.name)
        except ControlPlaneError as e:
            logger.error(f"Failed to claim build job: {e}")
            return False

        if job is None:
            logger.debug("No pending build jobs")
            return False

        logger.info(f"Claimed build job {job.id} ({job.repository}@{job.commit})")
        await self.process(job)
        return True

    async def process(self, job: BuildJob) -> None:
        """Build a claimed job, apply the result and report the final status."""
        try:
            result = await self.build(job)
        except (BuildError, RuntimeCommandError, OSError) as e:
            reason = self._mask(str(e))
            logger.error(f"Build job {job.id} failed: {reason}")
            await self._report(job.id, JOB_FAILED, reason=reason)
            return
        except Exception as e:
            reason = self._mask(f"unexpected build error: {e}")
            logger.error(f"Build job {job.id} failed: {reason}", exc_info=True)
            await self._report(job.id, JOB_FAILED, reason=reason)
            return

        if job.service_id:
            if result.compose:
                await self._apply_compose(job, result.compose)
            try:
                await asyncio.to_thread(
                    self.client.set_deployment,
                    job.service_id,
                    result.image,
                    job.environment,
                )
                logger.info(
                    f"Service {job.service_id} deployment set to {result.image}"
                )
            except ControlPlaneError as e:
                logger.error(f"Failed to set deployment for job {job.id}: {e}")
                await self._report(
                    job.id,
                    JOB_FAILED,
                    reason=f"deployment update failed: {e}",
                    artifacts=[result.image],
                )
                return

        await self._report(job.id, JOB_SUCCEEDED, artifacts=[result.image])
        logger.info(f"Build job {job.id} succeeded: {result.image}")

    async def _apply_compose(self, job: BuildJob, compose: str) -> None:
        try:
            await asyncio.to_thread(self.client.set_compose, job.service_id, compose)
            logger.info(f"Uploaded compose file for service {job.service_id}")
        except ControlPlaneError as e:
            logger.warning(f"Failed to upload compose for job {job.id}: {e}")

    async def _report(
        self,
        job_id: str,
        status: str,
        reason: str | None = None,
        artifacts: list[str] | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self.client.patch_build_job,
                job_id,
                status=status,
                reason=reason,
                artifacts=artifacts,
            )
        except ControlPlaneError as e:
            logger.error(f"Failed to report status {status} for job {job_id}: {e}")

    # ------------------------------------------------------------------
    # Build steps
    # ------------------------------------------------------------------

    def clone_url(self, repository: str) -> str:
        if self.github_token:
            return (
                f"https://x-access-token:{self.github_token}"
                f"@github.com/{repository}.git"
            )
        return f"https://github.com/{repository}.git"

    def image_tag(self, owner: str, name: str, commit: str) -> str:
        registry = self.registry or f"ghcr.io/{owner.lower()}"
        return f"{registry}/{name.lower()}:{commit[:12]}"

    async def build(self, job: BuildJob) -> BuildResult:
        """
        Check out the job's commit and build its image.

        Raises:
            BuildError: If the job cannot be built
            RuntimeCommandError: If a git or docker command fails
        """
        try:
            owner, name = split_repo_full_name(job.repository)
        except ValueError as e:
            raise BuildError(str(e)) from e
        if not job.commit:
            raise BuildError("job has no commit")

        checkout = self.workspace / job.id
        if checkout.exists():
            await asyncio.to_thread(shutil.rmtree, checkout)
        checkout.parent.mkdir(parents=True, exist_ok=True)

        try:
            await self._run(
                self.git_bin, "clone", self.clone_url(job.repository), str(checkout)
            )
            await self._run(
                self.git_bin, "-C", str(checkout), "fetch", "origin", job.commit
            )
            await self._run(
                self.git_bin, "-C", str(checkout), "checkout", "--force", job.commit
            )

            compose = self._read_compose(checkout, job.compose_path)

            image = self.image_tag(owner, name, job.commit)
            await self._run(self.docker_bin, "build", "-t", image, ".", cwd=checkout)
            if self.push:
                await self._run(self.docker_bin, "push", image)
            return BuildResult(image=image, compose=compose)
        finally:
            if not self.keep_workspace:
                await asyncio.to_thread(shutil.rmtree, checkout, True)

    def _read_compose(self, checkout: Path, compose_path: str) -> str:
        if not compose_path:
            return ""
        root = checkout.resolve()
        path = (checkout / compose_path).resolve()
        if not path.is_relative_to(root):
            raise BuildError(f"compose path escapes repository: {compose_path}")
        if not path.is_file():
            logger.info(f"No compose file at {compose_path}")
            return ""
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise BuildError(f"compose file {compose_path} is not valid UTF-8") from e

    def _mask(self, text: str) -> str:
        if self.github_token:
            return text.replace(self.github_token, MASK)
        return text

    async def _run(self, *args: str, cwd: Path | None = None) -> str:
        """
        Run a build command.

        Raises:
            RuntimeCommandError: If the command exits non-zero (token masked)
        """
        masked = [self._mask(arg) for arg in args]
        logger.info(f"Running: {' '.join(masked)}")
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "DOCKER_BUILDKIT": "1"}
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise RuntimeCommandError(masked, None, self._mask(str(e))) from e

        stdout, _ = await process.communicate()
        output = stdout.decode(errors="replace")
        if process.returncode != 0:
            raise RuntimeCommandError(masked, process.returncode, self._mask(output))
        return output
