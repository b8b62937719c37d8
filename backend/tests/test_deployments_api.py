"""Tests for /api/deployments endpoints: enqueue, status, listing and log streaming."""

import io
import json
import zipfile

from conftest import wait_for_job


def git_body(app_name="demo", **overrides):
    body = {
        "app_name": app_name,
        "repository": f"https://example/{app_name}.git",
        "branch": "main",
        "install_command": "true",
        "start_command": "true",
    }
    body.update(overrides)
    return body


def parse_sse(text: str):
    """Split an SSE body into (event, data) pairs, skipping comments."""
    events = []
    for block in text.strip().split("\n\n"):
        event, data = None, None
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        if event:
            events.append((event, data))
    return events


class TestDeployFromGit:

    def test_deploy_completes(self, client):
        resp = client.post("/api/deployments/git", json=git_body())
        assert resp.status_code == 202
        data = resp.json()
        assert data["status"] == "queued"
        assert data["app_name"] == "demo"

        job = wait_for_job(client, data["job_id"])
        assert job["status"] == "completed"
        assert job["error_message"] is None
        assert job["kind"] == "create"
        assert job["logs"]

        listed = client.get("/api/deployments").json()
        assert [j["app_name"] for j in listed] == ["demo"]

    def test_failing_install_reports_stage(self, client):
        job_id = client.post(
            "/api/deployments/git", json=git_body("broken", install_command="false")
        ).json()["job_id"]
        job = wait_for_job(client, job_id)
        assert job["status"] == "failed"
        assert "install" in job["error_message"]

    def test_unreachable_repository_fails_fetch(self, client, workspace):
        workspace.unreachable.add("https://example/gone.git")
        job_id = client.post("/api/deployments/git", json=git_body("gone")).json()["job_id"]
        job = wait_for_job(client, job_id)
        assert job["status"] == "failed"
        assert job["error_message"].startswith("fetch failed")

    def test_validation_error_is_400(self, client):
        resp = client.post("/api/deployments/git", json=git_body("Not_Valid"))
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["details"]["field"] == "app_name"
        assert client.get("/api/deployments").json() == []

    def test_missing_start_command_is_400(self, client):
        resp = client.post("/api/deployments/git", json=git_body(start_command=None))
        assert resp.status_code == 400
        assert resp.json()["details"]["field"] == "start_command"

    def test_duplicate_app_is_409(self, client):
        job_id = client.post("/api/deployments/git", json=git_body()).json()["job_id"]
        wait_for_job(client, job_id)
        resp = client.post("/api/deployments/git", json=git_body())
        assert resp.status_code == 409
        assert resp.json()["error"] == "APP_ALREADY_EXISTS"

    def test_unknown_runtime_is_422(self, client):
        resp = client.post("/api/deployments/git", json=git_body(runtime="ruby"))
        assert resp.status_code == 422


class TestDeployFromFile:

    @staticmethod
    def _zip(files):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            for name, content in files.items():
                zf.writestr(name, content)
        return buf.getvalue()

    def test_upload_deploys(self, client, workspace, supervisor):
        archive = self._zip({"site/server.js": "require('http')", "site/package.json": "{}"})
        resp = client.post(
            "/api/deployments/file",
            data={
                "app_name": "site",
                "start_command": "node server.js",
                "install_command": "true",
                "env_vars": "PORT=4100\nGREETING=hello",
                "domains": "site.example.com",
            },
            files={"file": ("site.zip", archive, "application/zip")},
        )
        assert resp.status_code == 202
        job = wait_for_job(client, resp.json()["job_id"])
        assert job["status"] == "completed"
        assert job["source_type"] == "file"
        assert (workspace.live_path("site") / "server.js").exists()
        assert supervisor.services["site"]["env"] == {"PORT": "4100", "GREETING": "hello"}

        app = client.get("/api/apps/site").json()
        assert app["domains"][0]["domain"] == "site.example.com"
        assert app["domains"][0]["port"] == 4100

    def test_corrupt_upload_fails_fetch(self, client):
        resp = client.post(
            "/api/deployments/file",
            data={"app_name": "site", "start_command": "true", "install_command": "true"},
            files={"file": ("site.zip", b"not a zip", "application/zip")},
        )
        job = wait_for_job(client, resp.json()["job_id"])
        assert job["status"] == "failed"
        assert job["error_message"].startswith("fetch failed")

    def test_bad_env_text_is_400(self, client):
        resp = client.post(
            "/api/deployments/file",
            data={"app_name": "site", "start_command": "true", "env_vars": "NOEQUALS"},
            files={"file": ("site.zip", self._zip({"a": "b"}), "application/zip")},
        )
        assert resp.status_code == 400
        assert resp.json()["details"]["field"] == "env_vars"

    def test_unsupported_runtime_is_400(self, client):
        resp = client.post(
            "/api/deployments/file",
            data={"app_name": "site", "start_command": "true", "runtime": "ruby"},
            files={"file": ("site.zip", self._zip({"a": "b"}), "application/zip")},
        )
        assert resp.status_code == 400


class TestJobQueries:

    def test_unknown_job_is_404(self, client):
        resp = client.get("/api/deployments/999999")
        assert resp.status_code == 404
        assert resp.json()["error"] == "JOB_NOT_FOUND"

    def test_list_newest_first(self, client):
        first = client.post("/api/deployments/git", json=git_body("one")).json()["job_id"]
        second = client.post("/api/deployments/git", json=git_body("two")).json()["job_id"]
        wait_for_job(client, second)

        jobs = client.get("/api/deployments").json()
        assert [j["id"] for j in jobs] == [second, first]
        assert "logs" not in jobs[0]

        only_one = client.get("/api/deployments", params={"app_name": "one"}).json()
        assert [j["id"] for j in only_one] == [first]


class TestLogStream:

    def test_finished_job_replays_log_then_end(self, client):
        job_id = client.post("/api/deployments/git", json=git_body()).json()["job_id"]
        job = wait_for_job(client, job_id)

        with client.stream("GET", f"/api/deployments/{job_id}/logs") as resp:
            assert resp.status_code == 200
            assert resp.headers["content-type"].startswith("text/event-stream")
            body = "".join(resp.iter_text())

        events = parse_sse(body)
        assert events[-1] == ("end", {"status": "completed", "error_message": None})
        text = "".join(data["text"] for event, data in events if event == "log")
        assert text == job["logs"]

    def test_live_stream_ends_with_failure_status(self, client):
        job_id = client.post(
            "/api/deployments/git", json=git_body("broken", install_command="echo oops; false")
        ).json()["job_id"]

        with client.stream("GET", f"/api/deployments/{job_id}/logs") as resp:
            body = "".join(resp.iter_text())

        events = parse_sse(body)
        seqs = [data["seq"] for event, data in events if event == "log"]
        assert seqs == sorted(set(seqs))
        end_event, end = events[-1]
        assert end_event == "end"
        assert end["status"] == "failed"
        assert "install" in end["error_message"]
        assert "oops" in "".join(data["text"] for event, data in events if event == "log")

    def test_stream_unknown_job_is_404(self, client):
        assert client.get("/api/deployments/424242/logs").status_code == 404
