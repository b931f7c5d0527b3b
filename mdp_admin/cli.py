"""
Admin CLI for the deployment platform.

Manages projects, services, domains, deployments, GitHub repositories and
installations, and build jobs through the control-plane HTTP API.
"""

import json
import sys
import time
from collections.abc import Callable
from typing import Any

import click

from mdp_client.client import DEFAULT_URL, ControlPlaneClient
from mdp_common.errors import ControlPlaneError
from mdp_common.ids import split_repo_full_name
from mdp_common.models import JOB_SUCCEEDED


def call_api(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call a client method, exiting with an error message on failure."""
    try:
        return func(*args, **kwargs)
    except ControlPlaneError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option(
    "--url",
    envvar="CONTROL_PLANE_URL",
    default=DEFAULT_URL,
    show_default=True,
    help="Control-plane base URL",
)
@click.option("--token", envvar="CONTROL_PLANE_TOKEN", default=None, help="API token")
@click.pass_context
def cli(ctx: click.Context, url: str, token: str | None):
    """mdp admin - Manage the deployment platform's desired state."""
    ctx.obj = ControlPlaneClient(url, token=token)


@cli.group()
def project():
    """Manage projects."""
    pass


@cli.group()
def service():
    """Manage services."""
    pass


@cli.group()
def domain():
    """Manage service domains."""
    pass


@cli.group()
def deploy():
    """Manage deployments."""
    pass


@cli.group()
def github():
    """Manage GitHub repositories and installations."""
    pass


@cli.group()
def builds():
    """Inspect and update build jobs."""
    pass


# ============================================================================
# Project Commands
# ============================================================================


@project.command("create")
@click.option("--name", required=True, help="Project name")
@click.option("--slug", default="", help="Project slug (default: derived from name)")
@click.pass_obj
def project_create(client: ControlPlaneClient, name: str, slug: str):
    """Create a new project."""
    created = call_api(client.create_project, name, slug=slug)
    click.echo("✓ Project created successfully")
    click.echo(f"  ID:   {created['id']}")
    click.echo(f"  Name: {created['name']}")
    click.echo(f"  Slug: {created['slug']}")


@project.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def project_list(client: ControlPlaneClient, json_output: bool):
    """List all projects."""
    projects = call_api(client.list_projects)
    if json_output:
        echo_json(projects)
        return
    if not projects:
        click.echo("No projects found.")
        return

    click.echo(f"\n{'ID':<26} {'Name':<24} {'Slug':<24}")
    click.echo("-" * 76)
    for p in projects:
        click.echo(f"{p['id']:<26} {p['name']:<24} {p['slug']:<24}")
    click.echo()


# ============================================================================
# Service Commands
# ============================================================================


@service.command("create")
@click.option("--project", "project_id", required=True, help="Project ID")
@click.option("--name", required=True, help="Service name")
@click.option("--image", default="", help="Container image")
@click.option("--port", default=80, show_default=True, help="Internal port")
@click.pass_obj
def service_create(
    client: ControlPlaneClient, project_id: str, name: str, image: str, port: int
):
    """Create a service in a project."""
    created = call_api(
        client.create_service, project_id, name, image=image, internal_port=port
    )
    click.echo("✓ Service created successfully")
    click.echo(f"  ID:    {created['id']}")
    click.echo(f"  Name:  {created['name']}")
    click.echo(f"  Image: {created['image'] or '(none)'}")
    click.echo(f"  Port:  {created['internal_port']}")


@service.command("list")
@click.option("--project", "project_id", required=True, help="Project ID")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def service_list(client: ControlPlaneClient, project_id: str, json_output: bool):
    """List the services of a project."""
    services = call_api(client.list_services, project_id)
    if json_output:
        echo_json(services)
        return
    if not services:
        click.echo("No services found.")
        return

    click.echo(f"\n{'ID':<26} {'Name':<20} {'Port':<6} {'Image':<40}")
    click.echo("-" * 94)
    for s in services:
        image = "(compose)" if (s.get("compose") or "").strip() else s["image"]
        click.echo(
            f"{s['id']:<26} {s['name']:<20} {s['internal_port']:<6} {image:<40}"
        )
    click.echo()


# ============================================================================
# Domain and Deployment Commands
# ============================================================================


@domain.command("add")
@click.option("--service", "service_id", required=True, help="Service ID")
@click.option("--hostname", required=True, help="Hostname to route")
@click.option("--env", "environment", default="production", show_default=True)
@click.pass_obj
def domain_add(
    client: ControlPlaneClient, service_id: str, hostname: str, environment: str
):
    """Route a hostname to a service."""
    created = call_api(
        client.add_domain, service_id, hostname, environment=environment
    )
    click.echo(
        f"✓ Domain {created['hostname']} added ({created['environment']}, "
        f"id {created['id']})"
    )


@deploy.command("set")
@click.option("--service", "service_id", required=True, help="Service ID")
@click.option("--image", required=True, help="Image to deploy")
@click.option("--env", "environment", default="production", show_default=True)
@click.pass_obj
def deploy_set(
    client: ControlPlaneClient, service_id: str, image: str, environment: str
):
    """Set the desired image of a service environment."""
    deployment = call_api(client.set_deployment, service_id, image, environment)
    click.echo(
        f"✓ Deployment set: {deployment.environment} -> {deployment.image} "
        f"(id {deployment.id})"
    )


# ============================================================================
# GitHub Commands
# ============================================================================


@github.command("repos")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def github_repos(client: ControlPlaneClient, json_output: bool):
    """List registered repositories."""
    repos = call_api(client.list_repositories)
    if json_output:
        echo_json(repos)
        return
    if not repos:
        click.echo("No repositories found.")
        return

    click.echo(f"\n{'Repository':<40} {'Branch':<12} {'Service':<26} {'Env':<12}")
    click.echo("-" * 92)
    for r in repos:
        full_name = f"{r['owner']}/{r['name']}"
        click.echo(
            f"{full_name:<40} {r['default_branch']:<12} "
            f"{r['service_id'] or '-':<26} {r['environment'] or '-':<12}"
        )
    click.echo()


@github.command("register")
@click.option("--repo", required=True, help="Repository as owner/name")
@click.option("--branch", default="main", show_default=True, help="Default branch")
@click.option(
    "--compose",
    "compose_path",
    default="docker-compose.yml",
    show_default=True,
    help="Compose file path in the repository",
)
@click.option("--installation", default="", help="Installation external ID")
@click.option("--service", "service_id", default="", help="Service to deploy to")
@click.option("--env", "environment", default="", help="Target environment")
@click.pass_obj
def github_register(
    client: ControlPlaneClient,
    repo: str,
    branch: str,
    compose_path: str,
    installation: str,
    service_id: str,
    environment: str,
):
    """Register a repository and route its builds to a service."""
    try:
        owner, name = split_repo_full_name(repo)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    stored = call_api(
        client.register_repository,
        owner,
        name,
        default_branch=branch,
        compose_path=compose_path,
        installation_id=installation,
        service_id=service_id,
        environment=environment,
    )
    click.echo(f"✓ Repository {stored['owner']}/{stored['name']} registered")
    click.echo(f"  ID:      {stored['id']}")
    click.echo(f"  Service: {stored['service_id'] or '(none)'}")


@github.group("installations", invoke_without_command=True)
@click.pass_context
def github_installations(ctx: click.Context):
    """List or register GitHub App installations."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(installations_list)


@github_installations.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def installations_list(client: ControlPlaneClient, json_output: bool = False):
    """List installations (secrets are never shown)."""
    installations = call_api(client.list_installations)
    if json_output:
        echo_json(installations)
        return
    if not installations:
        click.echo("No installations found.")
        return

    click.echo(f"\n{'ID':<32} {'Account':<20} {'External ID':<14} {'Secret':<6}")
    click.echo("-" * 76)
    for i in installations:
        secret = "yes" if i.get("has_webhook_secret") else "no"
        click.echo(
            f"{i['id']:<32} {i['account']:<20} {i['external_id']:<14} {secret:<6}"
        )
    click.echo()


@github_installations.command("register")
@click.option("--account", required=True, help="Account login")
@click.option("--external-id", required=True, help="Installation ID on GitHub")
@click.option("--secret", default="", help="Webhook secret")
@click.pass_obj
def installations_register(
    client: ControlPlaneClient, account: str, external_id: str, secret: str
):
    """Register an installation and its webhook secret."""
    stored = call_api(
        client.register_installation, account, external_id, webhook_secret=secret
    )
    click.echo(f"✓ Installation {stored['id']} registered")


# ============================================================================
# Build Job Commands
# ============================================================================


@builds.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def builds_list(client: ControlPlaneClient, json_output: bool):
    """List build jobs, oldest first."""
    jobs = call_api(client.list_build_jobs)
    if json_output:
        echo_json(jobs)
        return
    if not jobs:
        click.echo("No build jobs found.")
        return

    click.echo(f"\n{'ID':<26} {'Repository':<32} {'Commit':<14} {'Status':<10}")
    click.echo("-" * 84)
    for j in jobs:
        click.echo(
            f"{j['id']:<26} {j['repository']:<32} {j['commit'][:12]:<14} "
            f"{j['status']:<10}"
        )
    click.echo()


@builds.command("update")
@click.option("--id", "job_id", required=True, help="Build job ID")
@click.option(
    "--status",
    default=None,
    type=click.Choice(["pending", "running", "succeeded", "failed"]),
    help="New status",
)
@click.option("--reason", default="", help="Status reason")
@click.pass_obj
def builds_update(
    client: ControlPlaneClient, job_id: str, status: str | None, reason: str
):
    """Update a build job's status or reason."""
    if not status and not reason:
        click.echo("Error: Provide --status and/or --reason", err=True)
        sys.exit(1)

    job = call_api(
        client.update_build_job, job_id, status=status or "", reason=reason
    )
    click.echo(f"✓ Build job {job['id']} is {job['status']}")
    if job.get("reason"):
        click.echo(f"  Reason: {job['reason']}")


@builds.command("worker")
@click.option("--name", default="local-worker", show_default=True, help="Worker ID")
@click.option(
    "--interval", default=5.0, show_default=True, help="Seconds between claims"
)
@click.option(
    "--auto-complete/--no-auto-complete",
    default=True,
    show_default=True,
    help="Mark claimed jobs succeeded without building them",
)
@click.option("--reason", default="", help="Reason attached on completion")
@click.option(
    "--max-jobs", default=0, help="Stop after claiming this many jobs (0: never)"
)
@click.pass_obj
def builds_worker(
    client: ControlPlaneClient,
    name: str,
    interval: float,
    auto_complete: bool,
    reason: str,
    max_jobs: int,
):
    """Run a simulated build worker that claims jobs from the queue."""
    click.echo(f"[worker {name}] starting polling loop (interval {interval}s)")
    claimed = 0
    try:
        while not max_jobs or claimed < max_jobs:
            try:
                job = client.claim_build_job(name)
            except ControlPlaneError as e:
                click.echo(f"[worker {name}] claim error: {e}", err=True)
                time.sleep(interval)
                continue
            if job is None:
                time.sleep(interval)
                continue

            claimed += 1
            click.echo(
                f"[worker {name}] claimed job {job.id} ({job.repository} @ {job.commit})"
            )
            if auto_complete:
                try:
                    client.patch_build_job(
                        job.id, status=JOB_SUCCEEDED, reason=reason or None
                    )
                    click.echo(f"[worker {name}] completed job {job.id}")
                except ControlPlaneError as e:
                    click.echo(
                        f"[worker {name}] failed to mark job {job.id}: {e}", err=True
                    )
            if not max_jobs or claimed < max_jobs:
                time.sleep(interval)
    except KeyboardInterrupt:
        click.echo(f"[worker {name}] stopped")


if __name__ == "__main__":
    cli()
