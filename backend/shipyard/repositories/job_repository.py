"""Persistence for deployment jobs.

Only the queue manager writes through this repository, so each job row
has a single writer.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import BaseRepository
from ..exceptions import JobNotFoundError
from ..models.deployment_job import DeploymentJob, JOB_QUEUED, ACTIVE_STATUSES, TERMINAL_STATUSES


class JobRepository(BaseRepository[DeploymentJob]):
    model_class = DeploymentJob
    not_found_error = JobNotFoundError

    def save_job(
        self,
        app_name: str,
        source_type: str,
        kind: str,
        options: Dict[str, Any],
        created_at: datetime,
    ) -> DeploymentJob:
        job = DeploymentJob(
            app_name=app_name,
            source_type=source_type,
            kind=kind,
            options=options,
            status=JOB_QUEUED,
            logs="",
            created_at=created_at,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def update_job_status(self, job_id: int, status: str, **fields: Any) -> DeploymentJob:
        """Set status plus any of started_at / completed_at / error_message / logs.

        Raises:
            ValueError: the job already finished; terminal rows are never rewritten.
        """
        job = self.get_by_id(job_id)
        if job.status in TERMINAL_STATUSES:
            raise ValueError(f"Job {job_id} is already {job.status}")
        job.status = status
        for name, value in fields.items():
            if not hasattr(DeploymentJob, name):
                raise AttributeError(f"DeploymentJob has no column {name!r}")
            setattr(job, name, value)
        self.db.commit()
        self.db.refresh(job)
        return job

    def list_jobs(self, limit: Optional[int] = None, newest_first: bool = True) -> List[DeploymentJob]:
        order = DeploymentJob.id.desc() if newest_first else DeploymentJob.id.asc()
        query = self._base_query().order_by(order)
        if limit:
            query = query.limit(limit)
        return query.all()

    def list_jobs_for_app(self, app_name: str, limit: Optional[int] = None) -> List[DeploymentJob]:
        query = (
            self._base_query()
            .filter(DeploymentJob.app_name == app_name)
            .order_by(DeploymentJob.id.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def latest_for_app(self, app_name: str) -> Optional[DeploymentJob]:
        """Newest job that still describes the app (archived history is skipped)."""
        return (
            self._base_query()
            .filter(DeploymentJob.app_name == app_name, DeploymentJob.archived.is_(False))
            .order_by(DeploymentJob.id.desc())
            .first()
        )

    def active_jobs_for_app(self, app_name: str) -> List[DeploymentJob]:
        return (
            self._base_query()
            .filter(
                DeploymentJob.app_name == app_name,
                DeploymentJob.status.in_(list(ACTIVE_STATUSES)),
            )
            .order_by(DeploymentJob.id.asc())
            .all()
        )

    def has_active_job(self, app_name: str) -> bool:
        return bool(self.active_jobs_for_app(app_name))

    def oldest_queued(self) -> Optional[DeploymentJob]:
        return (
            self._base_query()
            .filter(DeploymentJob.status == JOB_QUEUED)
            .order_by(DeploymentJob.id.asc())
            .first()
        )

    def count_queued_before(self, job_id: int) -> int:
        return (
            self._base_query()
            .filter(DeploymentJob.status == JOB_QUEUED, DeploymentJob.id < job_id)
            .count()
        )

    def list_by_status(self, status: str) -> List[DeploymentJob]:
        return (
            self._base_query()
            .filter(DeploymentJob.status == status)
            .order_by(DeploymentJob.id.asc())
            .all()
        )

    def archive_for_app(self, app_name: str) -> int:
        """Mark every job of the app as archived. Returns the number of rows touched."""
        count = (
            self._base_query()
            .filter(DeploymentJob.app_name == app_name, DeploymentJob.archived.is_(False))
            .update({DeploymentJob.archived: True}, synchronize_session=False)
        )
        self.db.commit()
        return count
