"""Pipeline executor: the fixed stage sequence of one deployment.

Stages, in order: fetch, install, build (optional), promote, service,
proxy, persist. Output of every stage goes to the log broker as it is
produced. The first failing stage raises a stage-tagged ``PipelineError``;
nothing is retried. The executor never writes the job row itself, the
queue manager owns it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .command_runner import run_command
from .log_broker import LogBroker
from .proxy import DEFAULT_UPSTREAM_PORT, ReverseProxy
from .supervisor import ProcessSupervisor
from .workspace import WorkspaceProvisioner
from ..exceptions import CommandError, ErrorCode, FetchError, PipelineError, RegistrationError
from ..models.deployment_job import DeploymentJob
from ..repositories.app_repository import AppRepository
from ..schemas.deployment import DeployRequest, DomainSpec

logger = logging.getLogger(__name__)

KIND_CREATE = "create"
KIND_REDEPLOY = "redeploy"


def job_options(request: DeployRequest) -> Dict[str, Any]:
    """Serialize the parts of a validated request the pipeline needs."""
    return {
        "repository": request.repository,
        "branch": request.branch,
        "archive_path": request.archive_path,
        "runtime": request.runtime,
        "install_command": request.install_command,
        "build_command": request.build_command or None,
        "start_command": request.start_command,
        "env_vars": dict(request.env_vars),
        "domains": [d.model_dump() for d in request.domains],
    }


def upstream_port(env: Dict[str, str]) -> int:
    return int(env.get("PORT", DEFAULT_UPSTREAM_PORT))


@dataclass
class JobSpec:
    """Immutable input of one pipeline run, rebuilt from the job row."""
    job_id: int
    app_name: str
    kind: str
    source_type: str
    runtime: str
    install_command: str
    start_command: str
    repository: Optional[str] = None
    branch: Optional[str] = None
    archive_path: Optional[str] = None
    build_command: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    domains: List[DomainSpec] = field(default_factory=list)

    @classmethod
    def from_job(cls, job: DeploymentJob) -> "JobSpec":
        opts = job.options or {}
        return cls(
            job_id=job.id,
            app_name=job.app_name,
            kind=job.kind,
            source_type=job.source_type,
            runtime=opts.get("runtime", "node"),
            install_command=opts.get("install_command") or "",
            start_command=opts.get("start_command") or "",
            repository=opts.get("repository"),
            branch=opts.get("branch"),
            archive_path=opts.get("archive_path"),
            build_command=opts.get("build_command"),
            env=dict(opts.get("env_vars") or {}),
            domains=[DomainSpec(**d) for d in opts.get("domains") or []],
        )


class PipelineExecutor:
    """Runs one job's stages against the workspace, supervisor and proxy."""

    def __init__(
        self,
        workspace: WorkspaceProvisioner,
        supervisor: ProcessSupervisor,
        proxy: ReverseProxy,
        broker: LogBroker,
        session_factory: Callable[[], Session],
        command_timeout: Optional[float] = None,
    ):
        self.workspace = workspace
        self.supervisor = supervisor
        self.proxy = proxy
        self.broker = broker
        self.session_factory = session_factory
        self.command_timeout = command_timeout

    async def run(self, spec: JobSpec) -> None:
        """Execute every stage for *spec*.

        Raises:
            PipelineError: tagged with the stage that failed.
        """
        def log(text: str) -> None:
            self.broker.append(spec.job_id, text)

        log(f"==> Deploying {spec.app_name} (job {spec.job_id}, {spec.kind}, {spec.source_type})\n")
        staging = await self.workspace.prepare_staging(spec.app_name, spec.job_id)
        live: Optional[Path] = None
        added_routes: List[int] = []
        try:
            await self._fetch(spec, staging, log)
            await self._run_stage("install", spec.install_command, staging, spec, log)
            if spec.build_command and spec.build_command.strip():
                await self._run_stage("build", spec.build_command, staging, spec, log)
            else:
                log("==> build: skipped (no build command)\n")

            live = await self.workspace.promote(spec.app_name, staging)
            log(f"==> Workspace ready at {live}\n")

            await self._register_service(spec, live, log)
            await self._register_routes(spec, log, added_routes)
            await self._persist(spec, log)
        except Exception:
            if live is None:
                await self.workspace.discard(staging)
            elif spec.kind == KIND_CREATE:
                # A failed create leaves no record behind, so nothing may outlive it
                await self._undo_create(spec, live, added_routes, log)
            raise

        log(f"==> {spec.app_name} deployed\n")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _fetch(self, spec: JobSpec, staging: Path, log: Callable[[str], None]) -> None:
        if spec.source_type == "git":
            log(f"==> fetch: cloning branch {spec.branch}\n")
            await self.workspace.clone_or_checkout(spec.repository, spec.branch, staging, on_output=log)
            return

        if not spec.archive_path:
            raise FetchError("No archive stored for this app")
        log(f"==> fetch: extracting {Path(spec.archive_path).name}\n")
        names = await self.workspace.extract_archive(Path(spec.archive_path), staging)
        log(f"Extracted {len(names)} file(s)\n")

    async def _run_stage(
        self,
        stage: str,
        command: str,
        cwd: Path,
        spec: JobSpec,
        log: Callable[[str], None],
    ) -> None:
        log(f"==> {stage}\n$ {command}\n")
        result = await run_command(
            command,
            cwd=cwd,
            env=spec.env,
            on_output=log,
            timeout=self.command_timeout,
        )
        if not result.ok:
            raise CommandError(
                stage,
                command,
                result.exit_code,
                output=result.tail(),
                timed_out=result.timed_out,
            )
        log(f"==> {stage} finished in {result.duration_seconds:.1f}s\n")

    async def _register_service(self, spec: JobSpec, live: Path, log: Callable[[str], None]) -> None:
        log(f"==> service: registering {spec.app_name}\n")
        try:
            await asyncio.to_thread(
                self.supervisor.register_service,
                spec.app_name,
                spec.start_command,
                live,
                spec.env,
                spec.runtime,
            )
            await asyncio.to_thread(self.supervisor.start_service, spec.app_name)
        except RegistrationError:
            raise
        except Exception as e:
            raise RegistrationError("service", str(e)) from e
        log("Service started\n")

    async def _register_routes(
        self,
        spec: JobSpec,
        log: Callable[[str], None],
        added: List[int],
    ) -> None:
        """Route the requested domains; ids of newly created routes go to *added*."""
        port = upstream_port(spec.env)
        current = await asyncio.to_thread(self.proxy.routes_for, spec.app_name)
        domains = list(spec.domains)
        if spec.kind == KIND_REDEPLOY:
            # Stored routes follow the app's PORT; unchanged ones skip the proxy
            requested = {d.domain for d in domains}
            domains += [
                DomainSpec(domain=r.domain, ssl_enabled=r.ssl_enabled)
                for r in current if r.domain not in requested
            ]
            existing = {(r.domain, r.ssl_enabled, r.port) for r in current}
            domains = [d for d in domains if (d.domain, d.ssl_enabled, port) not in existing]
        if not domains:
            log("==> proxy: no route changes\n")
            return

        log(f"==> proxy: routing {', '.join(d.domain for d in domains)} to port {port}\n")
        known = {r.id for r in current}
        try:
            for domain in domains:
                route_id = await asyncio.to_thread(
                    self.proxy.add_route, spec.app_name, domain.domain, domain.ssl_enabled, port
                )
                if route_id not in known:
                    added.append(route_id)
            await asyncio.to_thread(self.proxy.apply)
        except RegistrationError:
            raise
        except Exception as e:
            raise RegistrationError("proxy", str(e)) from e
        log("Proxy reloaded\n")

    async def _persist(self, spec: JobSpec, log: Callable[[str], None]) -> None:
        def save() -> None:
            db = self.session_factory()
            try:
                AppRepository(db).save_app(
                    spec.app_name,
                    source_type=spec.source_type,
                    repository_url=spec.repository,
                    branch=spec.branch or "",
                    archive_path=spec.archive_path,
                    runtime=spec.runtime,
                    install_command=spec.install_command,
                    build_command=spec.build_command,
                    start_command=spec.start_command,
                    env_vars=spec.env,
                )
            finally:
                db.close()

        try:
            await asyncio.to_thread(save)
        except SQLAlchemyError as e:
            raise PipelineError("persist", f"could not save app record: {e}", ErrorCode.DATABASE_ERROR) from e
        log("==> persist: app record saved\n")

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _undo_create(
        self,
        spec: JobSpec,
        live: Path,
        route_ids: List[int],
        log: Callable[[str], None],
    ) -> None:
        """Remove the service, routes and workspace a failed create registered.

        Cleanup problems are logged next to the job output; the original
        stage error is what the job reports.
        """
        log(f"==> cleanup: removing what this job registered for {spec.app_name}\n")
        try:
            await asyncio.to_thread(self.supervisor.stop_service, spec.app_name)
            await asyncio.to_thread(self.supervisor.remove_service, spec.app_name)
        except Exception as e:
            logger.error(f"Cleanup of service {spec.app_name} failed: {e}", extra={"job_id": spec.job_id})
            log(f"cleanup: service removal failed: {e}\n")

        if route_ids:
            try:
                for route_id in route_ids:
                    await asyncio.to_thread(self.proxy.remove_route, route_id)
                await asyncio.to_thread(self.proxy.apply)
            except Exception as e:
                logger.error(f"Cleanup of routes for {spec.app_name} failed: {e}", extra={"job_id": spec.job_id})
                log(f"cleanup: proxy reload failed: {e}\n")

        await self.workspace.discard(live)
