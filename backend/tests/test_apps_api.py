"""Tests for /api/apps endpoints: describe, redeploy, service control and delete."""

import pytest

from conftest import wait_for_job


def deploy(client, app_name="demo", **overrides):
    body = {
        "app_name": app_name,
        "repository": f"https://example/{app_name}.git",
        "install_command": "true",
        "start_command": "node index.js",
        "env_vars": {"PORT": "3100"},
        "domains": [{"domain": f"{app_name}.example.com"}],
    }
    body.update(overrides)
    job_id = client.post("/api/deployments/git", json=body).json()["job_id"]
    return wait_for_job(client, job_id)


class TestDescribe:

    def test_running_app(self, client):
        deploy(client)
        resp = client.get("/api/apps/demo")
        assert resp.status_code == 200
        app = resp.json()
        assert app["state"] == "running"
        assert app["service_state"] == "active"
        assert app["branch"] == "main"
        assert app["start_command"] == "node index.js"
        assert app["env_vars"] == {"PORT": "3100"}
        assert app["domains"] == [{
            "id": app["domains"][0]["id"],
            "domain": "demo.example.com",
            "is_primary": True,
            "ssl_enabled": True,
            "port": 3100,
        }]

    def test_unknown_app_is_404(self, client):
        resp = client.get("/api/apps/ghost")
        assert resp.status_code == 404
        assert resp.json()["error"] == "APP_NOT_FOUND"

    def test_list(self, client):
        deploy(client, "one")
        deploy(client, "two", domains=[])
        names = [a["name"] for a in client.get("/api/apps").json()]
        assert names == ["one", "two"]


class TestRedeploy:

    def test_redeploy_queues_job(self, client):
        deploy(client)
        resp = client.post("/api/apps/demo/redeploy")
        assert resp.status_code == 202
        job = wait_for_job(client, resp.json()["job_id"])
        assert job["status"] == "completed"
        assert job["kind"] == "redeploy"

    def test_redeploy_with_extra_domain(self, client):
        deploy(client)
        resp = client.post("/api/apps/demo/redeploy", json={"domains": [{"domain": "www.demo.example.com"}]})
        wait_for_job(client, resp.json()["job_id"])
        domains = [d["domain"] for d in client.get("/api/apps/demo").json()["domains"]]
        assert domains == ["demo.example.com", "www.demo.example.com"]

    def test_redeploy_unknown_is_404(self, client):
        resp = client.post("/api/apps/ghost/redeploy")
        assert resp.status_code == 404


class TestServiceControl:

    def test_stop_then_start(self, client):
        deploy(client)
        resp = client.post("/api/apps/demo/stop")
        assert resp.status_code == 200
        assert resp.json()["service_state"] == "inactive"
        assert resp.json()["state"] == "running"

        resp = client.post("/api/apps/demo/start")
        assert resp.status_code == 200
        assert resp.json()["service_state"] == "active"

    def test_restart(self, client, supervisor):
        deploy(client)
        starts = supervisor.calls.count(("start", "demo"))
        resp = client.post("/api/apps/demo/restart")
        assert resp.status_code == 200
        assert resp.json()["service_state"] == "active"
        assert supervisor.calls.count(("start", "demo")) == starts + 1

    @pytest.mark.parametrize("action", ["start", "stop", "restart"])
    def test_unknown_app_is_404(self, client, action):
        resp = client.post(f"/api/apps/ghost/{action}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "APP_NOT_FOUND"

    def test_runtime_logs(self, client, supervisor):
        deploy(client)
        supervisor.output["demo"] = ["listening on 3100", "GET / 200", "GET /x 404"]
        resp = client.get("/api/apps/demo/logs", params={"lines": 2})
        assert resp.status_code == 200
        assert resp.json() == {"app_name": "demo", "lines": ["GET / 200", "GET /x 404"]}

    def test_runtime_logs_of_unknown_app(self, client):
        assert client.get("/api/apps/ghost/logs").status_code == 404


class TestDelete:

    def test_delete_then_gone(self, client, supervisor):
        deploy(client)
        resp = client.delete("/api/apps/demo")
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Deleted demo"
        assert "app record" in body["removed"]
        assert "demo" not in supervisor.services
        assert client.get("/api/apps/demo").status_code == 404

    def test_delete_twice(self, client):
        deploy(client)
        client.delete("/api/apps/demo")
        resp = client.delete("/api/apps/demo")
        assert resp.status_code == 200
        assert resp.json() == {
            "app_name": "demo",
            "message": "Nothing to delete for demo",
            "removed": [],
        }

    def test_job_history_survives_delete(self, client):
        job = deploy(client)
        client.delete("/api/apps/demo")
        assert client.get(f"/api/deployments/{job['id']}").json()["status"] == "completed"

    def test_invalid_name_is_400(self, client):
        assert client.delete("/api/apps/Bad_Name").status_code == 400
