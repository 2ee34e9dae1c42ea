"""Session lifecycle coordination: registry, state machine and dispatcher."""

from .dispatcher import ActionDispatcher
from .lifecycle import SessionStateMachine
from .registry import EngineRegistry
from .service import SessionCoordinator

__all__ = ["ActionDispatcher", "EngineRegistry", "SessionCoordinator", "SessionStateMachine"]
