"""
Build worker module.

The worker runs as a separate process from the control plane. It claims
build jobs over HTTP, builds images with git and docker and reports back.
"""

from .worker import BuildError, BuildResult, BuildWorker

__all__ = ["BuildWorker", "BuildResult", "BuildError"]
