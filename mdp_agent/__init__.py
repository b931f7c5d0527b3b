"""
Host reconciliation agent.

The agent runs on every host, independently of the control plane. It pulls
the rendered proxy configuration and the desired service list over HTTP and
converges local containers toward it.
"""

from .reconciler import ReconciliationAgent
from .runtime import ContainerRuntime, ContainerState, DockerRuntime, ServiceContainer

__all__ = [
    "ContainerRuntime",
    "ContainerState",
    "DockerRuntime",
    "ReconciliationAgent",
    "ServiceContainer",
]
