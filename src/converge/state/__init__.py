"""State management module for tracking applied resources."""

from .manager import StateManager
from .models import OutputState, RemoteState, StateFile

__all__ = [
    "OutputState",
    "RemoteState",
    "StateFile",
    "StateManager",
]
