"""
MDP Persistence module.

This module contains the state store implementation. State is held in memory
behind a reader/writer lock and persisted as one JSON snapshot file.

The persistence layer depends on mdp_common for domain models and interfaces,
and is used by the control-plane server.
"""

from .json_store import JSONStateStore
from .locks import ReadWriteLock

__all__ = ["JSONStateStore", "ReadWriteLock"]
