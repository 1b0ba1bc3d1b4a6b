"""
Conversation memory: a bounded, process-local sequence of turns.

Oldest turns are evicted first once `max_messages` is exceeded. The optional
`summary` is set by callers and never computed here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from .models import Turn

DEFAULT_MAX_MESSAGES = 20


class BaseMemory(ABC):
    """Abstract memory interface used by the agent."""

    summary: Optional[str] = None

    @abstractmethod
    def add(self, turn: Turn) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def recent(self, limit: Optional[int] = None) -> List[Turn]:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @property
    @abstractmethod
    def turns(self) -> Tuple[Turn, ...]:  # pragma: no cover - interface only
        raise NotImplementedError

    def __len__(self) -> int:
        return len(self.turns)


class InMemoryMemory(BaseMemory):
    """FIFO-bounded list of turns."""

    def __init__(self, max_messages: int = DEFAULT_MAX_MESSAGES) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self._max_messages = max_messages
        self._turns: List[Turn] = []
        self.summary: Optional[str] = None

    @property
    def max_messages(self) -> int:
        return self._max_messages

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def add(self, turn: Turn) -> None:
        self._turns.append(turn)
        overflow = len(self._turns) - self._max_messages
        if overflow > 0:
            del self._turns[:overflow]

    def recent(self, limit: Optional[int] = None) -> List[Turn]:
        """Last `limit` turns in insertion order; every stored turn when limit is None."""
        if limit is None:
            return list(self._turns)
        if limit <= 0:
            return []
        return self._turns[-limit:]

    def clear(self) -> None:
        """Drop every turn and the summary."""
        self._turns.clear()
        self.summary = None

    def __len__(self) -> int:
        return len(self._turns)
