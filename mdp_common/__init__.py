"""
MDP Common module.

This module contains shared domain models, the error taxonomy and the state
repository interface used across the platform components (server, agent,
worker, persistence).

The common module has no dependencies on other mdp_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import (
    AlreadyExistsError,
    ControlPlaneError,
    MDPError,
    NoJobAvailable,
    NotFoundError,
    PersistenceError,
    RuntimeCommandError,
    SignatureError,
    ValidationError,
)
from .models import (
    BuildJob,
    Deployment,
    Domain,
    Installation,
    Project,
    Repository,
    Service,
)
from .repository import StateRepository

__all__ = [
    "AlreadyExistsError",
    "BuildJob",
    "ControlPlaneError",
    "Deployment",
    "Domain",
    "Installation",
    "MDPError",
    "NoJobAvailable",
    "NotFoundError",
    "PersistenceError",
    "Project",
    "Repository",
    "RuntimeCommandError",
    "Service",
    "SignatureError",
    "StateRepository",
    "ValidationError",
]
