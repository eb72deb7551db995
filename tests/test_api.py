"""Tests for the HTTP API (FastAPI TestClient against the fake GitHub API)."""

from collections.abc import Iterator

import pytest
from fake_github import API_TOKEN, PROJECT_ID, FakeGitHub
from fastapi.testclient import TestClient

from secrets_sync_mcp.api import create_app, status_for
from secrets_sync_mcp.engine import (
    OperationInProgress,
    PayloadDivergence,
    PermissionDenied,
    RemoteApiError,
    SyncConfig,
)

AUTH = {"Authorization": f"Bearer {API_TOKEN}"}


@pytest.fixture
def api(served_config: SyncConfig) -> Iterator[TestClient]:
    with TestClient(create_app(served_config)) as test_client:
        yield test_client


def test_status_for_errors() -> None:
    assert status_for(PayloadDivergence("k")) == 409
    assert status_for(OperationInProgress("k")) == 409
    assert status_for(PermissionDenied("/repos/acme/api")) == 403
    assert status_for(RemoteApiError(502, "/x", "bad gateway")) == 500


class TestAuthentication:
    def test_health_is_public(self, api: TestClient) -> None:
        response = api.get("/health")

        assert response.status_code == 200
        assert response.json()["projectId"] == PROJECT_ID

    def test_missing_token(self, api: TestClient, fake_github: FakeGitHub) -> None:
        response = api.post(
            "/secrets/sync",
            json={"projectId": PROJECT_ID},
            headers={"X-Correlation-ID": "corr-401"},
        )

        assert response.status_code == 401
        assert response.json() == {
            "error": {
                "code": "UNAUTHORIZED",
                "message": "Missing or invalid bearer token",
                "correlationId": "corr-401",
            }
        }
        assert response.headers["X-Correlation-ID"] == "corr-401"
        assert fake_github.requests == []

    def test_wrong_token(self, api: TestClient) -> None:
        response = api.get(
            "/secrets/sync/status",
            params={"projectId": PROJECT_ID},
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401

    def test_refused_without_configured_token(
        self, api: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("SECRETS_SYNC_API_TOKEN")

        response = api.get("/secrets/sync/status", params={"projectId": PROJECT_ID}, headers=AUTH)

        assert response.status_code == 401


class TestSync:
    def test_distributes_from_source(self, api: TestClient, fake_github: FakeGitHub) -> None:
        response = api.post(
            "/secrets/sync",
            json={"projectId": PROJECT_ID},
            headers={**AUTH, "X-Correlation-ID": "corr-1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["correlationId"] == "corr-1"
        assert body["syncedCount"] == 5
        assert body["skipped"] == ["GITHUB_TOKEN"]
        assert fake_github.values["environment:dev"] == {"DATABASE_URL": "postgres://a"}
        assert fake_github.values["actions"] == {"API_KEY": "k-1234567890"}
        assert "k-1234567890" not in response.text

    def test_generates_correlation_id(self, api: TestClient) -> None:
        response = api.post(
            "/secrets/sync",
            json={"projectId": PROJECT_ID, "secretNames": ["API_KEY"], "targetScopes": ["actions"]},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json()["correlationId"] == response.headers["X-Correlation-ID"]

    def test_selected_names_and_scopes(self, api: TestClient, fake_github: FakeGitHub) -> None:
        response = api.post(
            "/secrets/sync",
            json={
                "projectId": PROJECT_ID,
                "secretNames": ["API_KEY", "NOT_IN_SOURCE"],
                "targetScopes": ["dependabot"],
            },
            headers=AUTH,
        )

        body = response.json()
        assert fake_github.puts() == ["/repos/acme/api/dependabot/secrets/API_KEY"]
        assert body["failedCount"] == 1
        assert body["errors"][0]["code"] == "SECRET_NOT_FOUND"
        assert body["errors"][0]["secretName"] == "NOT_IN_SOURCE"

    def test_unknown_project(self, api: TestClient) -> None:
        response = api.post("/secrets/sync", json={"projectId": "acme/other"}, headers=AUTH)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PROJECT_NOT_FOUND"

    def test_invalid_body(self, api: TestClient) -> None:
        response = api.post("/secrets/sync", json={"force": "maybe"}, headers=AUTH)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "projectId" in error["message"]

    def test_unknown_target_scope(self, api: TestClient) -> None:
        response = api.post(
            "/secrets/sync",
            json={"projectId": PROJECT_ID, "targetScopes": ["pages"]},
            headers=AUTH,
        )

        assert response.status_code == 400
        assert "Unknown scope" in response.json()["error"]["message"]

    def test_rate_limit_exhausted(self, api: TestClient, fake_github: FakeGitHub) -> None:
        fake_github.rate_remaining = 50

        response = api.post("/secrets/sync", json={"projectId": PROJECT_ID}, headers=AUTH)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "GITHUB_SECRETS_RATE_LIMIT_EXHAUSTED"
        assert int(response.headers["X-RateLimit-Reset"]) > 0
        assert fake_github.puts() == []


class TestIdempotency:
    def test_replay_returns_stored_result(self, api: TestClient, fake_github: FakeGitHub) -> None:
        body = {"projectId": PROJECT_ID, "secretNames": ["API_KEY"]}
        headers = {**AUTH, "Idempotency-Key": "sync-1"}

        first = api.post("/secrets/sync", json=body, headers=headers)
        writes = fake_github.secret_writes()
        second = api.post("/secrets/sync", json=body, headers=headers)

        assert first.status_code == second.status_code == 200
        assert second.json() == first.json()
        assert second.headers["Idempotent-Replayed"] == "true"
        assert "Idempotent-Replayed" not in first.headers
        assert fake_github.secret_writes() == writes

    def test_reused_key_with_other_payload(self, api: TestClient) -> None:
        headers = {**AUTH, "Idempotency-Key": "sync-2"}
        api.post(
            "/secrets/sync",
            json={"projectId": PROJECT_ID, "secretNames": ["API_KEY"]},
            headers=headers,
        )

        response = api.post(
            "/secrets/sync",
            json={"projectId": PROJECT_ID, "secretNames": ["API_KEY"], "force": True},
            headers=headers,
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "IDEMPOTENCY_KEY_CONFLICT"


class TestEnvironments:
    def test_created(self, api: TestClient, fake_github: FakeGitHub) -> None:
        response = api.post(
            "/environments",
            json={
                "projectId": PROJECT_ID,
                "environments": [
                    {"name": "dev"},
                    {
                        "name": "production",
                        "protectionRules": {"requiredReviewers": 2, "restrictToMainBranch": True},
                    },
                ],
            },
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json()["created"] == ["dev", "production"]
        assert set(fake_github.environments) == {"dev", "production"}

    def test_partial_failure_is_207(self, api: TestClient, fake_github: FakeGitHub) -> None:
        fake_github.environment_failures["staging"] = 500

        response = api.post(
            "/environments",
            json={"projectId": PROJECT_ID, "environments": [{"name": "dev"}, {"name": "staging"}]},
            headers=AUTH,
        )

        assert response.status_code == 207
        body = response.json()
        assert body["created"] == ["dev"]
        assert body["errors"][0]["environment"] == "staging"
        assert body["errors"][0]["code"] == "GITHUB_ENV_CREATION_FAILED"

    def test_unknown_environment_name(self, api: TestClient) -> None:
        response = api.post(
            "/environments",
            json={"projectId": PROJECT_ID, "environments": [{"name": "qa"}]},
            headers=AUTH,
        )

        assert response.status_code == 400

    def test_duplicate_environment(self, api: TestClient) -> None:
        response = api.post(
            "/environments",
            json={"projectId": PROJECT_ID, "environments": [{"name": "dev"}, {"name": "dev"}]},
            headers=AUTH,
        )

        assert response.status_code == 400
        assert "more than once" in response.json()["error"]["message"]


class TestStatusAndValidate:
    def test_status_before_and_after_sync(self, api: TestClient) -> None:
        params = {"projectId": PROJECT_ID}

        before = api.get("/secrets/sync/status", params=params, headers=AUTH).json()
        api.post("/secrets/sync", json={"projectId": PROJECT_ID}, headers=AUTH)
        after = api.get("/secrets/sync/status", params=params, headers=AUTH).json()

        assert before["status"] == "never_synced"
        assert after["status"] == "synced"
        assert after["lastSyncAt"] is not None
        assert set(after["quotaRemaining"]) == {"core", "secrets"}

    def test_status_requires_project(self, api: TestClient) -> None:
        response = api.get("/secrets/sync/status", headers=AUTH)
        assert response.status_code == 400

    def test_validate(self, api: TestClient) -> None:
        api.post("/secrets/sync", json={"projectId": PROJECT_ID}, headers=AUTH)

        response = api.post(
            "/secrets/validate",
            json={"projectId": PROJECT_ID, "requiredSecrets": ["API_KEY", "DATABASE_URL_PROD"]},
            headers={**AUTH, "X-Correlation-ID": "corr-v"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is False
        assert body["correlationId"] == "corr-v"
        assert body["missing"] == [
            {"secretName": "DATABASE_URL_PROD", "scope": "environment:production"}
        ]
        assert body["summary"]["validCount"] == 1

    def test_validate_requires_names(self, api: TestClient) -> None:
        response = api.post(
            "/secrets/validate", json={"projectId": PROJECT_ID, "requiredSecrets": []}, headers=AUTH
        )
        assert response.status_code == 400
