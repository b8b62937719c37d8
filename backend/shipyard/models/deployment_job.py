"""Deployment job model: one queued build/deploy attempt and its audit trail."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, String, Text, Integer, DateTime, JSON, Index
from ..database import Base


JOB_QUEUED = "queued"
JOB_BUILDING = "building"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED})
ACTIVE_STATUSES = frozenset({JOB_QUEUED, JOB_BUILDING})


class DeploymentJob(Base):
    """
    Tracks a single deployment through the build queue.

    Status transitions: queued -> building -> completed | failed
    Terminal jobs are never re-queued; a redeploy creates a new row.
    """

    __tablename__ = "deployment_jobs"
    __table_args__ = (
        Index("ix_deployment_jobs_status", "status"),
        Index("ix_deployment_jobs_app_name", "app_name"),
    )

    # Monotonic id assigned by the database at enqueue; also the FIFO order
    id = Column(Integer, primary_key=True, autoincrement=True)

    app_name = Column(String(64), nullable=False)
    # Allowed values: git, file
    source_type = Column(String(10), nullable=False)
    # Allowed values: create, redeploy
    kind = Column(String(10), nullable=False, default="create")

    # Source reference and runtime spec captured at enqueue time
    options = Column(JSON, nullable=False, default=dict)

    # Allowed values: queued, building, completed, failed
    status = Column(String(20), nullable=False, default=JOB_QUEUED)
    logs = Column(Text, nullable=False, default="")
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Set when the app is deleted; archived jobs stay queryable but no longer
    # describe the state of a future app with the same name
    archived = Column(Boolean, nullable=False, default=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
