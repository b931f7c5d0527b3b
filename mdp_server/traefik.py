"""
Rendering of Traefik dynamic configuration from the desired state.

Every service becomes a load-balanced Traefik service pointing at the port the
agent publishes on the loopback interface; every domain becomes a TLS router.
Keys are sorted so identical state always renders byte-identical output,
which the agent relies on for change detection.
"""

from collections.abc import Iterable
from typing import Any

import yaml

from mdp_common.ids import new_id, sanitize_key
from mdp_common.models import Service

DEFAULT_CERT_RESOLVER = "le"
DEFAULT_PORT = 80


def service_key(service: Service) -> str:
    """Return the Traefik service name for a platform service."""
    return sanitize_key(service.name) or sanitize_key(service.id)


def build_traefik_config(
    services: Iterable[Service], cert_resolver: str = DEFAULT_CERT_RESOLVER
) -> dict[str, Any]:
    """Build the dynamic configuration document as plain dictionaries."""
    resolver = cert_resolver or DEFAULT_CERT_RESOLVER
    routers: dict[str, Any] = {}
    lb_services: dict[str, Any] = {}

    for service in services:
        key = service_key(service)
        port = service.internal_port or DEFAULT_PORT
        lb_services[key] = {
            "loadBalancer": {"servers": [{"url": f"http://127.0.0.1:{port}"}]}
        }

        for domain in service.domains:
            router_name = "-".join(
                part
                for part in (
                    key,
                    sanitize_key(domain.environment),
                    sanitize_key(domain.hostname),
                )
                if part
            ) or f"{key}-{new_id()}"
            routers[router_name] = {
                "rule": f"Host(`{domain.hostname}`)",
                "service": key,
                "entryPoints": ["websecure"],
                "tls": {"certResolver": resolver},
            }

    return {"http": {"routers": routers, "services": lb_services}}


def render_traefik_config(
    services: Iterable[Service], cert_resolver: str = DEFAULT_CERT_RESOLVER
) -> str:
    """Render the dynamic configuration as YAML."""
    return yaml.safe_dump(
        build_traefik_config(services, cert_resolver),
        sort_keys=True,
        default_flow_style=False,
    )
