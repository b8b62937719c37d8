"""Durable deployment queue with a single in-process worker.

Jobs are rows in ``deployment_jobs``; the queue is simply the set of
``queued`` rows ordered by id. One asyncio task (the worker) claims the
oldest queued job, runs the pipeline for it, and records the outcome
before claiming the next one, so at most one job is ``building`` at any
time and jobs build in enqueue order.

``enqueue`` is synchronous and thread-safe: FastAPI runs sync endpoints
in a threadpool, and enqueue only validates, inserts the row and wakes
the worker through ``loop.call_soon_threadsafe``. It never runs pipeline
code on the caller's thread.

The QueueManager is the only writer of job rows. The pipeline reports
through return/raise and log chunks, never by touching the row.
"""

import asyncio
import logging
import re
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .log_broker import LogBroker, Subscription
from .pipeline import KIND_CREATE, KIND_REDEPLOY, JobSpec, PipelineExecutor, job_options
from ..core.config import settings
from ..core.logging_config import job_id_var
from ..exceptions import (
    AppAlreadyExistsError,
    AppBusyError,
    AppNotFoundError,
    PipelineError,
    ValidationError,
)
from ..models.deployment_job import JOB_BUILDING, JOB_COMPLETED, JOB_FAILED, JOB_QUEUED
from ..repositories.app_repository import AppRepository
from ..repositories.job_repository import JobRepository
from ..schemas.deployment import DeployRequest, EnqueueResponse, JobResponse, JobSummary

logger = logging.getLogger(__name__)

# DNS label: lowercase, digits, inner hyphens. Also used as unit and directory name.
APP_NAME_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)*[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"
)

INTERRUPTED_BY_RESTART = "interrupted by service restart"
INTERRUPTED_BY_SHUTDOWN = "interrupted by service shutdown"
CANCELLED_BY_DELETE = "cancelled: app deleted"

# Back-off after an unexpected error in the worker loop itself
WORKER_ERROR_BACKOFF_SECONDS = 1.0

# Writing a finished job's row; the delay grows with each attempt
OUTCOME_WRITE_ATTEMPTS = 5
OUTCOME_RETRY_DELAY_SECONDS = 0.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueManager:
    """Owns job identity, job status and the single worker task."""

    def __init__(
        self,
        executor: PipelineExecutor,
        broker: LogBroker,
        session_factory: Callable[[], Session],
        default_branch: Optional[str] = None,
        default_install_command: Optional[str] = None,
    ):
        self.executor = executor
        self.broker = broker
        self.session_factory = session_factory
        self.default_branch = default_branch or settings.default_branch
        self.default_install_command = default_install_command or settings.default_install_command

        # Serializes validate + insert so two concurrent creates cannot both pass.
        # Held across database calls, so it is only ever taken off the event loop.
        self._lock = threading.Lock()
        # Guards _held and _current only; never held across I/O
        self._state_lock = threading.Lock()
        # Apps being deleted; enqueue rejects them
        self._held: Set[str] = set()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None
        self._current: Optional[JobSpec] = None
        self._current_done: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, request: DeployRequest, kind: str = KIND_CREATE) -> EnqueueResponse:
        """Validate *request* and persist it as a queued job.

        Returns immediately with the new job id.

        Raises:
            ValidationError: malformed name or missing/invalid fields.
            AppAlreadyExistsError: create for a name that is registered or provisioning.
            AppNotFoundError: redeploy of an app with no record.
            AppBusyError: the app is being deleted.
        """
        return self._enqueue(request, kind)

    def enqueue_upload(self, request: DeployRequest, archive: bytes) -> EnqueueResponse:
        """Enqueue a create from an uploaded archive.

        The bytes are written to a private file before the queue lock is
        taken, and renamed over the app's stored archive only once the
        request has passed validation, so a rejected upload never replaces
        another app's archive.
        """
        if not archive:
            raise ValidationError("Uploaded archive is empty", field="file")
        workspace = self.executor.workspace
        request = request.model_copy(update={
            "source_type": "file",
            "archive_path": str(workspace.archive_path(request.app_name.strip())),
        })
        staged = workspace.stage_upload(archive)
        try:
            return self._enqueue(request, KIND_CREATE, staged_archive=staged)
        finally:
            # Already renamed into place when the job was accepted
            staged.unlink(missing_ok=True)

    def _enqueue(
        self,
        request: DeployRequest,
        kind: str,
        staged_archive: Optional[Path] = None,
    ) -> EnqueueResponse:
        with self._lock:
            db = self.session_factory()
            try:
                request = self._validate(db, request, kind)
                if staged_archive is not None:
                    self.executor.workspace.commit_upload(request.app_name, staged_archive)

                jobs = JobRepository(db)
                job = jobs.save_job(
                    app_name=request.app_name,
                    source_type=request.source_type,
                    kind=kind,
                    options=job_options(request),
                    created_at=_utcnow(),
                )
                ahead = jobs.count_queued_before(job.id)
            finally:
                db.close()

        self.broker.open(job.id)
        logger.info(
            f"Enqueued job {job.id} ({kind}) for {job.app_name}",
            extra={"job_id": job.id, "app_name": job.app_name, "kind": kind},
        )
        self._notify()

        position = "next in line" if ahead == 0 else f"{ahead} job(s) ahead"
        return EnqueueResponse(
            job_id=job.id,
            app_name=job.app_name,
            status=job.status,
            message=f"Deployment of '{job.app_name}' queued as job {job.id} ({position})",
        )

    def _validate(self, db: Session, request: DeployRequest, kind: str) -> DeployRequest:
        name = (request.app_name or "").strip()
        if not APP_NAME_RE.match(name):
            raise ValidationError(
                "App name must be 1-63 lowercase letters, digits or hyphens, "
                "starting and ending with a letter or digit",
                field="app_name",
            )
        with self._state_lock:
            held = name in self._held
        if held:
            raise AppBusyError(name)

        app_exists = AppRepository(db).get_app(name) is not None
        if kind == KIND_CREATE:
            if app_exists or JobRepository(db).has_active_job(name):
                raise AppAlreadyExistsError(name)
        elif kind == KIND_REDEPLOY:
            if not app_exists:
                raise AppNotFoundError(name)
        else:
            raise ValidationError(f"Unknown job kind: {kind}", field="kind")

        updates = {"app_name": name}

        if request.source_type == "git":
            repository = (request.repository or "").strip()
            if not repository:
                raise ValidationError("Repository URL is required for git deployments", field="repository")
            if any(c.isspace() for c in repository) or repository.startswith("-"):
                raise ValidationError("Repository URL is malformed", field="repository")
            branch = (request.branch or self.default_branch).strip()
            if not branch or branch.startswith("-") or any(c.isspace() for c in branch):
                raise ValidationError("Branch name is invalid", field="branch")
            updates.update(repository=repository, branch=branch)
        else:
            if not request.archive_path:
                raise ValidationError("An uploaded archive is required for file deployments", field="file")

        start_command = (request.start_command or "").strip()
        if not start_command:
            raise ValidationError("Start command is required", field="start_command")
        install_command = (request.install_command or "").strip() or self.default_install_command
        build_command = (request.build_command or "").strip() or None
        updates.update(
            start_command=start_command,
            install_command=install_command,
            build_command=build_command,
        )

        for key, value in request.env_vars.items():
            if not ENV_KEY_RE.match(key):
                raise ValidationError(f"Invalid environment variable name: {key!r}", field="env_vars")
            if "\0" in value:
                raise ValidationError(f"Environment variable {key} contains a NUL byte", field="env_vars")
        port = request.env_vars.get("PORT")
        if port is not None and not (port.isdigit() and 0 < int(port) < 65536):
            raise ValidationError("PORT must be a number between 1 and 65535", field="env_vars")

        seen = set()
        for spec in request.domains:
            if not DOMAIN_RE.match(spec.domain):
                raise ValidationError(f"Invalid domain: {spec.domain!r}", field="domains")
            if spec.domain in seen:
                raise ValidationError(f"Duplicate domain: {spec.domain}", field="domains")
            seen.add(spec.domain)

        return request.model_copy(update=updates)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, job_id: int) -> JobResponse:
        """Snapshot of one job. Logs of a running job come from the broker."""
        db = self.session_factory()
        try:
            job = JobRepository(db).get_by_id(job_id)
            response = JobResponse.model_validate(job)
        finally:
            db.close()
        if not job.is_terminal:
            live = self.broker.get_logs(job_id)
            if live is not None:
                response.logs = live
        return response

    def list_all(self, limit: Optional[int] = None, app_name: Optional[str] = None) -> List[JobSummary]:
        """Every job, newest first."""
        db = self.session_factory()
        try:
            jobs = JobRepository(db)
            rows = jobs.list_jobs_for_app(app_name, limit) if app_name else jobs.list_jobs(limit)
            return [JobSummary.model_validate(row) for row in rows]
        finally:
            db.close()

    def subscribe(self, job_id: int) -> Subscription:
        """Attach a log reader, rebuilding the channel from the row if needed.

        Raises:
            JobNotFoundError: unknown job id.
        """
        subscription = self.broker.subscribe(job_id)
        if subscription is not None:
            return subscription

        db = self.session_factory()
        try:
            job = JobRepository(db).get_by_id(job_id)
        finally:
            db.close()
        if job.is_terminal:
            self.broker.restore(job.id, job.logs or "", job.status, job.error_message)
        else:
            self.broker.open(job.id)
        return self.broker.subscribe(job_id)

    def unsubscribe(self, job_id: int, subscription: Subscription) -> None:
        self.broker.unsubscribe(job_id, subscription)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover jobs from a previous process and start the worker task."""
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        await asyncio.to_thread(self.recover)
        self._task = asyncio.create_task(self._worker_loop(), name="shipyard-queue-worker")
        logger.info("Deployment queue worker started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Deployment queue worker stopped")

    def recover(self) -> Tuple[int, int]:
        """Fail jobs a dead process left building and reopen queued ones.

        Returns:
            (interrupted, resumed) counts.
        """
        db = self.session_factory()
        try:
            jobs = JobRepository(db)
            interrupted = jobs.list_by_status(JOB_BUILDING)
            for job in interrupted:
                jobs.update_job_status(
                    job.id,
                    JOB_FAILED,
                    error_message=INTERRUPTED_BY_RESTART,
                    completed_at=_utcnow(),
                )
            queued = jobs.list_by_status(JOB_QUEUED)
        finally:
            db.close()

        for job in queued:
            self.broker.open(job.id)
        if interrupted or queued:
            logger.info(f"Recovered queue: {len(interrupted)} interrupted, {len(queued)} resumed")
        return len(interrupted), len(queued)

    def _notify(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            # Not started yet; start() picks queued jobs up
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake()
        else:
            loop.call_soon_threadsafe(self._wake)

    def _wake(self) -> None:
        self._idle.clear()
        self._wakeup.set()

    async def _worker_loop(self) -> None:
        while True:
            try:
                self._wakeup.clear()
                spec = await asyncio.to_thread(self._claim_next)
                if spec is None:
                    self._idle.set()
                    await self._wakeup.wait()
                    continue
                self._idle.clear()
                await self._process(spec)
            except asyncio.CancelledError:
                raise
            except Exception:
                # The worker must outlive any single failure
                logger.exception("Deployment queue worker error")
                await asyncio.sleep(WORKER_ERROR_BACKOFF_SECONDS)

    def _claim_next(self) -> Optional[JobSpec]:
        # Same lock as delete: a job is either cancelled or claimed, never both
        with self._lock:
            db = self.session_factory()
            try:
                jobs = JobRepository(db)
                job = jobs.oldest_queued()
                if job is None:
                    return None
                job = jobs.update_job_status(job.id, JOB_BUILDING, started_at=_utcnow())
            finally:
                db.close()
            spec = JobSpec.from_job(job)
            with self._state_lock:
                self._current = spec
                self._current_done = asyncio.Event()
        logger.info(
            f"Claimed job {job.id} for {job.app_name}",
            extra={"job_id": job.id, "app_name": job.app_name},
        )
        return spec

    async def _process(self, spec: JobSpec) -> None:
        token = job_id_var.set(spec.job_id)
        try:
            try:
                await self.executor.run(spec)
            except PipelineError as e:
                logger.warning(
                    f"Job {spec.job_id} failed: {e.job_message()}",
                    extra={"job_id": spec.job_id, "app_name": spec.app_name, "stage": e.stage},
                )
                await self._finish(spec, JOB_FAILED, e.job_message())
            except asyncio.CancelledError:
                self._record_outcome(spec, JOB_FAILED, INTERRUPTED_BY_SHUTDOWN)
                raise
            except Exception as e:
                logger.exception(f"Job {spec.job_id} crashed")
                await self._finish(spec, JOB_FAILED, f"internal error: {e}")
            else:
                logger.info(
                    f"Job {spec.job_id} completed",
                    extra={"job_id": spec.job_id, "app_name": spec.app_name},
                )
                await self._finish(spec, JOB_COMPLETED, None)
        finally:
            with self._state_lock:
                done, self._current = self._current_done, None
            done.set()
            job_id_var.reset(token)

    async def _finish(self, spec: JobSpec, status: str, error_message: Optional[str]) -> None:
        if error_message:
            self.broker.append(spec.job_id, f"==> FAILED: {error_message}\n")
        logs = self.broker.get_logs(spec.job_id) or ""
        try:
            for attempt in range(1, OUTCOME_WRITE_ATTEMPTS + 1):
                try:
                    await asyncio.to_thread(self._persist_outcome, spec.job_id, status, error_message, logs)
                    break
                except SQLAlchemyError as e:
                    if attempt == OUTCOME_WRITE_ATTEMPTS:
                        # Left building; recover() fails it on the next start
                        logger.error(
                            f"Could not record outcome of job {spec.job_id} after {attempt} attempts: {e}",
                            extra={"job_id": spec.job_id, "status": status},
                        )
                        break
                    logger.warning(f"Recording outcome of job {spec.job_id} failed, retrying: {e}")
                    await asyncio.sleep(OUTCOME_RETRY_DELAY_SECONDS * attempt)
        finally:
            # Row first, then stream end: a reader seeing the end sees the terminal row
            self.broker.close(spec.job_id, status, error_message)

    def _record_outcome(self, spec: JobSpec, status: str, error_message: Optional[str]) -> None:
        """Blocking variant of _finish for the cancellation path."""
        self.broker.append(spec.job_id, f"==> FAILED: {error_message}\n")
        logs = self.broker.get_logs(spec.job_id) or ""
        try:
            self._persist_outcome(spec.job_id, status, error_message, logs)
        finally:
            self.broker.close(spec.job_id, status, error_message)

    def _persist_outcome(self, job_id: int, status: str, error_message: Optional[str], logs: str) -> None:
        db = self.session_factory()
        try:
            JobRepository(db).update_job_status(
                job_id,
                status,
                error_message=error_message,
                logs=logs,
                completed_at=_utcnow(),
            )
        finally:
            db.close()

    async def wait_until_idle(self, timeout: float = 30.0) -> None:
        """Block until no job is queued or building."""
        async def _wait() -> None:
            while True:
                await self._idle.wait()
                if not await asyncio.to_thread(self._has_pending):
                    return
                await asyncio.sleep(0.05)

        await asyncio.wait_for(_wait(), timeout)

    def _has_pending(self) -> bool:
        db = self.session_factory()
        try:
            jobs = JobRepository(db)
            return bool(jobs.list_by_status(JOB_QUEUED) or jobs.list_by_status(JOB_BUILDING))
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Delete support
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def hold_app(self, app_name: str) -> AsyncIterator[List[int]]:
        """Quiesce an app for teardown.

        While held, enqueue rejects the name. On entry the app's queued jobs
        are failed and a running build for it is awaited. On clean exit the
        app's job history is archived so it no longer describes the app.
        Yields the ids of the cancelled jobs.
        """
        with self._state_lock:
            if app_name in self._held:
                raise AppBusyError(app_name)
            self._held.add(app_name)
        try:
            cancelled = await asyncio.to_thread(self._cancel_queued, app_name)
            with self._state_lock:
                current, done = self._current, self._current_done
            for job_id in cancelled:
                self.broker.append(job_id, f"==> {CANCELLED_BY_DELETE}\n")
                self.broker.close(job_id, JOB_FAILED, CANCELLED_BY_DELETE)

            if current is not None and current.app_name == app_name and done is not None:
                logger.info(f"Waiting for running job {current.job_id} before deleting {app_name}")
                await done.wait()

            yield cancelled

            await asyncio.to_thread(self._archive, app_name)
        finally:
            with self._state_lock:
                self._held.discard(app_name)

    def is_held(self, app_name: str) -> bool:
        with self._state_lock:
            return app_name in self._held

    def _cancel_queued(self, app_name: str) -> List[int]:
        with self._lock:
            return self._cancel_queued_locked(app_name)

    def _cancel_queued_locked(self, app_name: str) -> List[int]:
        db = self.session_factory()
        try:
            jobs = JobRepository(db)
            cancelled = []
            for job in jobs.active_jobs_for_app(app_name):
                if job.status != JOB_QUEUED:
                    continue
                jobs.update_job_status(
                    job.id,
                    JOB_FAILED,
                    error_message=CANCELLED_BY_DELETE,
                    logs=f"==> {CANCELLED_BY_DELETE}\n",
                    completed_at=_utcnow(),
                )
                cancelled.append(job.id)
            return cancelled
        finally:
            db.close()

    def _archive(self, app_name: str) -> int:
        db = self.session_factory()
        try:
            return JobRepository(db).archive_for_app(app_name)
        finally:
            db.close()
