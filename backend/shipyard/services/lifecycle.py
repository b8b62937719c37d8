"""Lifecycle of a logical app: redeploy, delete, service control and state queries.

App state is derived, never stored:

    absent        no record and no live job
    provisioning  the newest job is queued or building
    running       a record exists and the newest job completed
    failed        the newest job failed

Delete tears down everything an app may own (service unit, proxy routes,
record, workspace, stored archive). Each step tolerates the thing being
absent, so deleting a half-provisioned app or deleting twice succeeds.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from .pipeline import KIND_REDEPLOY
from .proxy import ReverseProxy
from .queue_manager import APP_NAME_RE, QueueManager
from .supervisor import SERVICE_ACTIVE, ProcessSupervisor
from .workspace import WorkspaceProvisioner
from ..exceptions import AppBusyError, AppNotFoundError, RegistrationError, ValidationError
from ..models.deployment_job import ACTIVE_STATUSES, JOB_COMPLETED, JOB_FAILED
from ..repositories.app_repository import AppRepository
from ..repositories.job_repository import JobRepository
from ..schemas.app import AppResponse, DomainResponse, ServiceLogsResponse
from ..schemas.deployment import DeployRequest, DomainSpec, EnqueueResponse

logger = logging.getLogger(__name__)

STATE_ABSENT = "absent"
STATE_PROVISIONING = "provisioning"
STATE_RUNNING = "running"
STATE_FAILED = "failed"

ACTION_START = "start"
ACTION_STOP = "stop"
ACTION_RESTART = "restart"
SERVICE_ACTIONS = (ACTION_START, ACTION_STOP, ACTION_RESTART)


class LifecycleCoordinator:

    def __init__(
        self,
        queue: QueueManager,
        supervisor: ProcessSupervisor,
        proxy: ReverseProxy,
        workspace: WorkspaceProvisioner,
        session_factory: Callable[[], Session],
    ):
        self.queue = queue
        self.supervisor = supervisor
        self.proxy = proxy
        self.workspace = workspace
        self.session_factory = session_factory

    def redeploy(self, app_name: str, domains: Optional[List[DomainSpec]] = None) -> EnqueueResponse:
        """Queue a new job from the stored app configuration.

        Git apps rebuild from the tip of the stored branch, file apps from
        the stored archive.

        Raises:
            AppNotFoundError: the app was never successfully deployed.
        """
        db = self.session_factory()
        try:
            app = AppRepository(db).get_by_id(app_name)
            request = DeployRequest(
                app_name=app.name,
                source_type=app.source_type,
                repository=app.repository_url,
                branch=app.branch or None,
                archive_path=app.archive_path,
                runtime=app.runtime,
                install_command=app.install_command,
                build_command=app.build_command,
                start_command=app.start_command,
                env_vars=app.env,
                domains=domains or [],
            )
        finally:
            db.close()

        logger.info(f"Redeploying {app_name}", extra={"app_name": app_name})
        return self.queue.enqueue(request, kind=KIND_REDEPLOY)

    async def delete(self, app_name: str) -> List[str]:
        """Remove every trace of an app. Returns what was actually removed.

        Raises:
            ValidationError: malformed app name.
            RegistrationError: a collaborator failed to remove something that exists.
        """
        if not APP_NAME_RE.match(app_name or ""):
            raise ValidationError("Invalid app name", field="app_name")

        removed: List[str] = []
        errors: List[str] = []

        async with self.queue.hold_app(app_name) as cancelled:
            removed += [f"queued job {job_id}" for job_id in cancelled]

            try:
                if await asyncio.to_thread(self.supervisor.stop_service, app_name):
                    removed.append("service stopped")
                if await asyncio.to_thread(self.supervisor.remove_service, app_name):
                    removed.append("service unit")
            except Exception as e:
                errors.append(f"service: {e}")

            try:
                routes = await asyncio.to_thread(self.proxy.routes_for, app_name)
                for route in routes:
                    if await asyncio.to_thread(self.proxy.remove_route, route.id):
                        removed.append(f"route {route.domain}")
                if routes:
                    await asyncio.to_thread(self.proxy.apply)
            except Exception as e:
                errors.append(f"proxy: {e}")

            try:
                if await asyncio.to_thread(self._delete_record, app_name):
                    removed.append("app record")
            except Exception as e:
                errors.append(f"record: {e}")

            try:
                removed += await self.workspace.remove_app(app_name)
            except OSError as e:
                errors.append(f"workspace: {e}")

            if errors:
                logger.error(f"Delete of {app_name} incomplete: {'; '.join(errors)}")
                raise RegistrationError("delete", "; ".join(errors))

        logger.info(
            f"Deleted {app_name}: {', '.join(removed) or 'nothing to remove'}",
            extra={"app_name": app_name},
        )
        return removed

    def _delete_record(self, app_name: str) -> bool:
        db = self.session_factory()
        try:
            return AppRepository(db).delete_app(app_name)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Service control
    # ------------------------------------------------------------------

    async def control(self, app_name: str, action: str) -> AppResponse:
        """Start, stop or restart an app's process without rebuilding it.

        Starting an app that is already active does nothing. The stored
        configuration and routes are left alone.

        Raises:
            ValidationError: unknown action.
            AppNotFoundError: the app has no record.
            AppBusyError: the app is being deleted or has a job queued or building.
            RegistrationError: the supervisor failed or knows no service for the app.
        """
        if action not in SERVICE_ACTIONS:
            raise ValidationError(f"Unknown action: {action}", field="action")
        await asyncio.to_thread(self._require_idle, app_name)

        if action == ACTION_STOP:
            if not await asyncio.to_thread(self.supervisor.stop_service, app_name):
                raise RegistrationError("service", f"no service registered for {app_name}")
        elif (
            action == ACTION_START
            and await asyncio.to_thread(self.supervisor.service_status, app_name) == SERVICE_ACTIVE
        ):
            logger.info(f"{app_name} is already running", extra={"app_name": app_name})
        else:
            await asyncio.to_thread(self.supervisor.start_service, app_name)

        logger.info(f"Service {action} for {app_name}", extra={"app_name": app_name})
        return await asyncio.to_thread(self.describe, app_name)

    async def service_logs(self, app_name: str, lines: int = 100) -> ServiceLogsResponse:
        """Recent output of the app's process, as kept by the supervisor.

        Raises:
            AppNotFoundError: the app has no record.
        """
        await asyncio.to_thread(self._require_record, app_name)
        output = await asyncio.to_thread(self.supervisor.service_logs, app_name, lines)
        return ServiceLogsResponse(app_name=app_name, lines=output)

    def _require_record(self, app_name: str) -> None:
        db = self.session_factory()
        try:
            AppRepository(db).get_by_id(app_name)
        finally:
            db.close()

    def _require_idle(self, app_name: str) -> None:
        if self.queue.is_held(app_name):
            raise AppBusyError(app_name)
        db = self.session_factory()
        try:
            AppRepository(db).get_by_id(app_name)
            latest = JobRepository(db).latest_for_app(app_name)
        finally:
            db.close()
        # The running pipeline restarts the service itself when it finishes
        if latest is not None and latest.status in ACTIVE_STATUSES:
            raise AppBusyError(app_name, "being deployed")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def app_state(self, app_name: str) -> str:
        db = self.session_factory()
        try:
            has_record = AppRepository(db).get_app(app_name) is not None
            latest = JobRepository(db).latest_for_app(app_name)
        finally:
            db.close()
        return _derive_state(has_record, latest.status if latest else None)

    def describe(self, app_name: str) -> AppResponse:
        """Stored config plus live state.

        An app still provisioning its first job has no record yet; it is
        described from the job's options instead.

        Raises:
            AppNotFoundError: neither a record nor a live job exists.
        """
        db = self.session_factory()
        try:
            app = AppRepository(db).get_app(app_name)
            env = app.env if app is not None else {}
            domains = AppRepository(db).domains_for(app_name)
            latest = JobRepository(db).latest_for_app(app_name)
        finally:
            db.close()

        if app is None and latest is None:
            raise AppNotFoundError(app_name)

        state = _derive_state(app is not None, latest.status if latest else None)
        common = dict(
            name=app_name,
            domains=[DomainResponse.model_validate(d) for d in domains],
            state=state,
            service_state=self.supervisor.service_status(app_name),
            last_job_id=latest.id if latest else None,
        )
        if app is not None:
            return AppResponse(
                source_type=app.source_type,
                repository_url=app.repository_url,
                branch=app.branch,
                runtime=app.runtime,
                install_command=app.install_command,
                build_command=app.build_command,
                start_command=app.start_command,
                env_vars=env,
                created_at=app.created_at,
                updated_at=app.updated_at,
                **common,
            )

        opts = latest.options or {}
        return AppResponse(
            source_type=latest.source_type,
            repository_url=opts.get("repository"),
            branch=opts.get("branch") or "",
            runtime=opts.get("runtime", "node"),
            install_command=opts.get("install_command") or "",
            build_command=opts.get("build_command"),
            start_command=opts.get("start_command") or "",
            env_vars=opts.get("env_vars") or {},
            created_at=latest.created_at,
            **common,
        )

    def list_apps(self) -> List[AppResponse]:
        db = self.session_factory()
        try:
            names = [app.name for app in AppRepository(db).list_apps()]
        finally:
            db.close()
        return [self.describe(name) for name in names]


def _derive_state(has_record: bool, latest_status: Optional[str]) -> str:
    if latest_status in ACTIVE_STATUSES:
        return STATE_PROVISIONING
    if latest_status == JOB_FAILED:
        return STATE_FAILED
    if has_record and latest_status in (JOB_COMPLETED, None):
        return STATE_RUNNING
    return STATE_ABSENT
