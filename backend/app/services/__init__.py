"""Services package."""

from backend.app.services.action_store import ActionStore
from backend.app.services.orchestrator import Orchestrator, build_orchestrator

__all__ = [
    "ActionStore",
    "Orchestrator",
    "build_orchestrator",
]
