"""
Unit tests for Traefik dynamic configuration rendering.
"""

import yaml

from mdp_common.models import Domain, Service
from mdp_server.traefik import build_traefik_config, render_traefik_config, service_key


def make_service(**kwargs):
    defaults = {"id": "svc1", "project_id": "p1", "name": "Web App", "internal_port": 3000}
    defaults.update(kwargs)
    return Service(**defaults)


class TestTraefikConfig:
    """Test suite for the rendered Traefik configuration."""

    def test_router_and_service_per_domain(self):
        service = make_service(
            domains=[
                Domain(id="d1", service_id="svc1", environment="production", hostname="app.example.com"),
                Domain(id="d2", service_id="svc1", environment="staging", hostname="staging.example.com"),
            ]
        )

        config = build_traefik_config([service], cert_resolver="myresolver")

        routers = config["http"]["routers"]
        assert set(routers) == {
            "web-app-production-app-example-com",
            "web-app-staging-staging-example-com",
        }
        router = routers["web-app-production-app-example-com"]
        assert router == {
            "rule": "Host(`app.example.com`)",
            "service": "web-app",
            "entryPoints": ["websecure"],
            "tls": {"certResolver": "myresolver"},
        }
        assert config["http"]["services"]["web-app"] == {
            "loadBalancer": {"servers": [{"url": "http://127.0.0.1:3000"}]}
        }

    def test_port_zero_defaults_to_80(self):
        config = build_traefik_config([make_service(internal_port=0)])
        url = config["http"]["services"]["web-app"]["loadBalancer"]["servers"][0]["url"]
        assert url == "http://127.0.0.1:80"

    def test_service_key_falls_back_to_id(self):
        assert service_key(make_service(name="!!!", id="ABC_1")) == "abc-1"

    def test_empty_state(self):
        config = yaml.safe_load(render_traefik_config([]))
        assert config == {"http": {"routers": {}, "services": {}}}

    def test_rendering_is_stable(self):
        """Test that identical state renders byte-identical YAML."""
        first = make_service(
            id="a",
            name="alpha",
            domains=[Domain(id="d1", service_id="a", environment="production", hostname="a.test")],
        )
        second = make_service(id="b", name="beta")

        one = render_traefik_config([first, second], "le")
        two = render_traefik_config([second, first], "le")
        assert one == two
        assert yaml.safe_load(one)["http"]["routers"]["alpha-production-a-test"]["tls"] == {
            "certResolver": "le"
        }
