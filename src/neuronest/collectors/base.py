"""Abstract base class for sensor links."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Protocol

from neuronest.models import LinkStatus
from neuronest.streaming.events import EventBus


class EndpointStore(Protocol):
    """Somewhere to remember the last working address/port between sessions."""

    async def save_endpoint(self, address: str, port: int) -> None: ...


class BaseLink(ABC):
    """Contract that every sensor link must implement.

    A link owns the connection lifecycle to exactly one source of readings
    and publishes :mod:`~neuronest.streaming.events` on its bus:
    ``ReadingReceived`` per tick, ``ConnectionChanged`` on transitions and
    ``LinkError`` for failures.
    """

    synthetic: bool = False

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop producing readings; safe to call repeatedly."""

    @abstractmethod
    def status(self) -> LinkStatus:
        """Return a snapshot of the connection state."""

    @property
    def is_connected(self) -> bool:
        return self.status().is_connected

    async def close(self) -> None:
        """Release any resources held by the link."""
        await self.disconnect()
