"""Database models."""

from .app import App, AppEnvVar, AppDomain
from .deployment_job import DeploymentJob

__all__ = ["App", "AppEnvVar", "AppDomain", "DeploymentJob"]
