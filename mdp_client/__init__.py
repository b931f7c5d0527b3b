from .client import ControlPlaneClient

__all__ = ["ControlPlaneClient"]
