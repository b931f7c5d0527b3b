"""
Unit tests for GitHub webhook verification and event handling.
"""

import json

import pytest
import pytest_asyncio

from mdp_common.errors import SignatureError
from mdp_common.models import Installation, Project, Repository, Service
from mdp_persistence.json_store import JSONStateStore
from mdp_server.webhooks import (
    compute_signature,
    extract_installation_id,
    handle_delivery,
    parse_installation_repos_event,
    parse_push_event,
    verify_signature,
)

SECRET = "topsecret"


def push_body(full_name="acme/web", after="a" * 40, installation=42):
    return json.dumps(
        {
            "ref": "refs/heads/main",
            "after": after,
            "repository": {"full_name": full_name},
            "installation": {"id": installation},
        }
    ).encode()


@pytest_asyncio.fixture
async def store(tmp_path):
    repo = JSONStateStore(tmp_path / "state.json")
    await repo.initialize()
    yield repo
    await repo.close()


class TestSignatures:
    """Test suite for HMAC signature verification."""

    def test_valid_signature(self):
        body = b'{"hello": "world"}'
        verify_signature(compute_signature(body, SECRET), body, SECRET)

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "sha1=abcdef",
            "sha256=not-hex",
            "sha256=" + "00" * 32,
        ],
    )
    def test_invalid_signatures(self, header):
        with pytest.raises(SignatureError):
            verify_signature(header, b"{}", SECRET)

    def test_signature_covers_exact_body(self):
        signature = compute_signature(b'{"a": 1}', SECRET)
        with pytest.raises(SignatureError):
            verify_signature(signature, b'{"a":1}', SECRET)


class TestParsing:
    """Test suite for payload extraction."""

    def test_parse_push_event(self):
        event = parse_push_event(push_body())
        assert event.repository == "acme/web"
        assert event.ref == "refs/heads/main"
        assert event.after == "a" * 40

    def test_parse_push_event_builds_full_name(self):
        body = json.dumps(
            {"after": "abc", "repository": {"name": "web", "owner": {"login": "acme"}}}
        ).encode()
        assert parse_push_event(body).repository == "acme/web"

    def test_parse_rejects_non_object(self):
        with pytest.raises(ValueError):
            parse_push_event(b"[1, 2]")

    def test_extract_installation_id(self):
        assert extract_installation_id(push_body(installation=99)) == "99"
        assert extract_installation_id(b"{}") == ""
        assert extract_installation_id(b"garbage") == ""

    def test_parse_installation_repositories(self):
        body = json.dumps(
            {
                "action": "added",
                "repositories_added": [{"full_name": "acme/api"}],
                "repositories_removed": [
                    {"name": "old", "owner": {"login": "acme"}}
                ],
            }
        ).encode()

        event = parse_installation_repos_event(body)
        assert event.action == "added"
        assert event.added[0].owner_and_name() == ("acme", "api")
        assert event.removed[0].full_name == "acme/old"

    @pytest.mark.parametrize(
        "payload",
        [
            {"after": "abc", "repository": "acme/web"},
            {"after": "abc", "repository": {"name": "web", "owner": "acme"}},
            {"after": ["abc"], "ref": 7, "repository": {"full_name": 5}},
        ],
    )
    def test_parse_push_event_ignores_malformed_fields(self, payload):
        event = parse_push_event(json.dumps(payload).encode())
        assert event.repository == ""
        assert event.ref == ""

    def test_parse_installation_repositories_skips_malformed_entries(self):
        body = json.dumps(
            {
                "repositories": "nope",
                "repositories_added": ["acme/api", {"full_name": "acme/web", "owner": 1}],
                "repositories_removed": None,
            }
        ).encode()

        event = parse_installation_repos_event(body)
        assert event.existing == []
        assert [r.owner_and_name() for r in event.added] == [("acme", "web")]
        assert event.removed == []


class TestHandleDelivery:
    """Test suite for delivery handling against a real store."""

    @pytest.mark.asyncio
    async def test_push_routes_through_registered_repository(self, store):
        await store.create_project(Project(id="p1", name="Demo"))
        await store.create_service(Service(id="s1", project_id="p1", name="web"))
        await store.upsert_repository(
            Repository(
                id="acme-web",
                owner="acme",
                name="web",
                compose_path="deploy/compose.yml",
                service_id="s1",
            )
        )

        response = await handle_delivery(
            store,
            event="push",
            delivery_id="d-1",
            installation_header="",
            signature=None,
            body=push_body(),
        )

        assert response["status"] == "accepted"
        assert response["installation_id"] == "42"
        job = await store.get_build_job(response["build_job_id"])
        assert job.status == "pending"
        assert job.service_id == "s1"
        assert job.environment == "production"
        assert job.compose_path == "deploy/compose.yml"
        assert job.installation == "42"

    @pytest.mark.asyncio
    async def test_push_without_commit_creates_no_job(self, store):
        response = await handle_delivery(
            store, "push", "d-1", "", None, push_body(after="")
        )
        assert "build_job_id" not in response
        assert await store.list_build_jobs() == []

    @pytest.mark.asyncio
    async def test_push_with_malformed_repository_is_acknowledged(self, store):
        body = json.dumps(
            {"after": "a" * 40, "repository": {"name": "web", "owner": "acme"}}
        ).encode()

        response = await handle_delivery(store, "push", "d-1", "", None, body)

        assert response["status"] == "accepted"
        assert "build_job_id" not in response
        assert await store.list_build_jobs() == []

    @pytest.mark.asyncio
    async def test_secret_requires_valid_signature(self, store):
        await store.upsert_installation(
            Installation(id="acme-42", account="acme", external_id="42", webhook_secret=SECRET)
        )
        body = push_body()

        with pytest.raises(SignatureError):
            await handle_delivery(store, "push", "d-1", "42", None, body)
        with pytest.raises(SignatureError):
            await handle_delivery(
                store, "push", "d-1", "42", compute_signature(body, "wrong"), body
            )
        assert await store.list_build_jobs() == []

        response = await handle_delivery(
            store, "push", "d-1", "42", compute_signature(body, SECRET), body
        )
        assert response["build_job_id"]

    @pytest.mark.asyncio
    async def test_unverifiable_signature_rejected(self, store):
        """Test that a signature with no stored secret to check it is rejected."""
        body = push_body()
        with pytest.raises(SignatureError):
            await handle_delivery(
                store, "push", "d-1", "", compute_signature(body, SECRET), body
            )
        assert await store.list_build_jobs() == []

    @pytest.mark.asyncio
    async def test_installation_repositories_sync(self, store):
        await store.upsert_repository(Repository(id="acme-old", owner="acme", name="old"))
        body = json.dumps(
            {
                "action": "added",
                "installation": {"id": 7},
                "repositories_added": [{"full_name": "acme/api", "default_branch": "trunk"}],
                "repositories_removed": [{"full_name": "acme/old"}],
            }
        ).encode()

        response = await handle_delivery(
            store, "installation_repositories", "d-2", "", None, body
        )

        assert response["added"] == ["acme/api"]
        repos = await store.list_repositories()
        assert [(r.id, r.default_branch, r.installation_id) for r in repos] == [
            ("acme-api", "trunk", "7")
        ]

    @pytest.mark.asyncio
    async def test_other_events_acknowledged(self, store):
        response = await handle_delivery(store, "ping", "d-3", "", None, b"{}")
        assert response == {
            "status": "accepted",
            "event": "ping",
            "delivery_id": "d-3",
            "installation_id": "",
        }
