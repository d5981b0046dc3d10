"""Persisted state of applied declarations."""

from driftwood.state.models import State, StateRecord
from driftwood.state.store import DEFAULT_STATE_PATH, StateStore

__all__ = ["DEFAULT_STATE_PATH", "State", "StateRecord", "StateStore"]
