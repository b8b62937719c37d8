"""Data access repositories."""

from .base import BaseRepository
from .app_repository import AppRepository
from .job_repository import JobRepository

__all__ = [
    "BaseRepository",
    "AppRepository",
    "JobRepository",
]
