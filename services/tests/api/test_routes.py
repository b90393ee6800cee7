"""Tests for the HTTP gateway."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from shipyard.api.app import create_application
from shipyard.api.dependencies import get_executor
from shipyard.config import settings
from shipyard.errors import ApplicationBusyError, NotFoundError, ValidationError
from shipyard.services import step_log_service
from shipyard.services.github_service import Repository
from shipyard.steps.base import StepOutcome, StepResult

STEP_BODY = {"host": "203.0.113.10", "username": "deploy", "applicationName": "shop"}


@pytest.fixture
def step_executor():
    executor = MagicMock()
    executor.run = AsyncMock()
    return executor


@pytest.fixture
def app(database, step_executor):
    application = create_application()
    application.state.database = database
    application.dependency_overrides[get_executor] = lambda: step_executor
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def _outcome(success=True, message="done", data=None, http_status=200):
    return StepOutcome(
        step="deploy-key-generation",
        result=StepResult(success, message, data),
        application_id=None,
        http_status=http_status,
    )


class TestHealth:
    async def test_health(self, client):
        res = await client.get("/health")
        assert res.status_code == 200
        assert res.json()["status"] == "ok"

    async def test_request_id_echoed(self, client):
        res = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"


class TestStepRoutes:
    async def test_success(self, client, step_executor):
        step_executor.run.return_value = _outcome(data={"keyName": "shop_deploy_key"})

        res = await client.post("/api/step/deploy-key", json={**STEP_BODY, "selectedRepo": "octo/repo"})

        assert res.status_code == 200
        assert res.json() == {"success": True, "message": "done", "data": {"keyName": "shop_deploy_key"}}
        step_executor.run.assert_awaited_once_with(
            "deploy-key-generation", {**STEP_BODY, "selectedRepo": "octo/repo"}
        )

    async def test_failed_step(self, client, step_executor):
        step_executor.run.return_value = _outcome(success=False, message="mkdir failed", http_status=500)

        res = await client.post("/api/step/folder-setup", json=STEP_BODY)

        assert res.status_code == 500
        assert res.json() == {"success": False, "message": "mkdir failed", "error": "mkdir failed"}

    @pytest.mark.parametrize(
        "path,step",
        [
            ("/api/step/check-github-token", "check-github-token"),
            ("/api/step/database-create", "database-create"),
            ("/api/step/env-setup", "env-setup"),
            ("/api/step/env-update", "env-update"),
            ("/api/step/ssh-key-setup", "ssh-key-setup"),
            ("/api/step/deploy-workflow-update", "deploy-workflow-update"),
        ],
    )
    async def test_route_to_step(self, client, step_executor, path, step):
        step_executor.run.return_value = _outcome()
        await client.post(path, json=STEP_BODY)
        assert step_executor.run.await_args.args[0] == step

    async def test_missing_fields(self, client, step_executor):
        step_executor.run.side_effect = ValidationError(
            "Missing required fields: host, username", missing=["host", "username"]
        )

        res = await client.post("/api/step/folder-setup", json={})

        assert res.status_code == 400
        assert res.json() == {
            "success": False,
            "error": "Missing required fields: host, username",
            "missing": ["host", "username"],
        }

    async def test_unknown_application(self, client, step_executor):
        step_executor.run.side_effect = NotFoundError("Application not found. Please verify connection first.")
        res = await client.post("/api/step/env-update", json=STEP_BODY)
        assert res.status_code == 404
        assert res.json()["success"] is False

    async def test_busy_application(self, client, step_executor):
        step_executor.run.side_effect = ApplicationBusyError("busy")
        res = await client.post("/api/step/env-update", json=STEP_BODY)
        assert res.status_code == 409

    async def test_non_object_body(self, client):
        res = await client.post("/api/step/env-update", json=["not", "an", "object"])
        assert res.status_code == 400
        assert res.json()["success"] is False


class TestConnectionVerify:
    async def test_flattens_result(self, client, step_executor):
        step_executor.run.return_value = StepOutcome(
            step="connection-verify",
            result=StepResult(
                False,
                "Connection verification completed",
                {"applicationId": "abc", "connections": {"ssh": {"connected": False}, "github": None}},
            ),
            application_id=None,
            http_status=200,
        )

        res = await client.post("/api/connection/verify", json={**STEP_BODY, "privateKeyContent": "k"})

        assert res.status_code == 200
        body = res.json()
        assert body["success"] is False
        assert body["applicationId"] == "abc"
        assert body["connections"]["ssh"]["connected"] is False
        step_executor.run.assert_awaited_once()
        assert step_executor.run.await_args.args[0] == "connection-verify"


class TestStepHistory:
    async def test_unknown_application(self, client):
        res = await client.get("/api/steps/203.0.113.10/deploy/missing")
        assert res.status_code == 404
        assert res.json() == {"success": False, "error": "Application not found"}

    async def test_history_and_current(self, client, database, application_id):
        async with database.session() as db:
            await step_log_service.append_step_log(db, application_id, "folder-setup", "failed", "no sudo")
            await step_log_service.append_step_log(db, application_id, "folder-setup", "success", "ok")
            await step_log_service.append_step_log(db, application_id, "database-create", "success", "ok")

        res = await client.get("/api/steps/203.0.113.10/deploy/shop")

        assert res.status_code == 200
        body = res.json()
        assert body["applicationId"] == str(application_id)
        assert [s["status"] for s in body["steps"]] == ["failed", "success", "success"]
        assert body["current"] == {"folder-setup": "success", "database-create": "success"}


class TestApplications:
    async def test_list_and_show(self, client, application_id):
        res = await client.get("/api/applications")
        assert res.status_code == 200
        apps = res.json()["applications"]
        assert [a["id"] for a in apps] == [str(application_id)]
        assert apps[0]["hasGithubToken"] is True
        assert "githubToken" not in apps[0]

        res = await client.get(f"/api/applications/{application_id}")
        assert res.json()["application"]["applicationName"] == "shop"

    async def test_show_missing(self, client):
        res = await client.get("/api/applications/0190f3a4-0000-7000-8000-000000000000")
        assert res.status_code == 404

    async def test_select_repo(self, client, redis, application_id):
        res = await client.post(
            f"/api/applications/{application_id}/select-repo",
            json={"selectedRepo": "git@github.com:octo/shop.git"},
        )
        assert res.json() == {"success": True, "selectedRepo": "octo/shop"}
        redis.set.assert_awaited_once()
        redis.eval.assert_awaited_once()

        res = await client.post(
            f"/api/applications/{application_id}/select-repo", json={"selectedRepo": "nope"}
        )
        assert res.status_code == 400

    async def test_database_config(self, client, redis, application_id):
        res = await client.post(
            f"/api/applications/{application_id}/database-config",
            json={"dbType": "postgres", "dbName": "shop", "dbUsername": "shop", "dbPassword": "pw"},
        )
        assert res.status_code == 200
        redis.set.assert_awaited_once()

        res = await client.get(f"/api/applications/{application_id}/database-config")
        config = res.json()["databaseConfig"]
        assert config["dbType"] == "postgresql"
        assert config["hasPassword"] is True
        assert "dbPassword" not in config

    async def test_edits_wait_for_running_step(self, client, redis, application_id):
        redis.set.return_value = None

        with patch.object(settings.executor, "lease_wait_seconds", 0):
            res = await client.post(
                f"/api/applications/{application_id}/database-config",
                json={"dbType": "mysql", "dbName": "shop", "dbUsername": "shop"},
            )
            assert res.status_code == 409
            res = await client.post(
                f"/api/applications/{application_id}/select-repo", json={"selectedRepo": "octo/other"}
            )
            assert res.status_code == 409

        res = await client.get(f"/api/applications/{application_id}/database-config")
        assert res.json()["databaseConfig"] is None
        res = await client.get(f"/api/applications/{application_id}")
        assert res.json()["application"]["selectedRepo"] is None


class TestGitHubRepos:
    async def test_lists_with_stored_token(self, client, application_id):
        tokens = []

        async def fake_list(token):
            tokens.append(token)
            yield Repository("shop", "octo/shop", True, "main", "2026-01-01T00:00:00Z")

        with patch("shipyard.services.github_service.list_repositories", fake_list):
            res = await client.get(
                "/api/github/repos",
                params={"host": "203.0.113.10", "username": "deploy", "applicationName": "shop"},
            )

        assert res.status_code == 200
        assert res.json()["repositories"][0]["full_name"] == "octo/shop"
        assert tokens == ["ghp_test"]

    async def test_unknown_application(self, client):
        res = await client.get(
            "/api/github/repos", params={"host": "h", "username": "u", "applicationName": "x"}
        )
        assert res.status_code == 404
