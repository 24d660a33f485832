"""
Notifier boundary - deliver chain events to a transport.

The completion controller decides when ChainResponse / ChainDone / ChainError
fire. A Notifier decides how they travel; it receives each event together with
the run's resolved channels.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Sequence

from jobchain.schemas import ChainEvent, Channel

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Abstract base class for event delivery."""

    @abstractmethod
    def publish(self, event: ChainEvent, channels: Sequence[Channel]) -> None:
        """
        Deliver an event.

        Args:
            event: The event to deliver
            channels: Routes the event should be broadcast on
        """
        pass


class LoggingNotifier(Notifier):
    """Writes each event to the log."""

    def __init__(self, level: int = logging.INFO):
        self._level = level

    def publish(self, event: ChainEvent, channels: Sequence[Channel]) -> None:
        routes = ", ".join(str(c) for c in channels)
        logger.log(
            self._level,
            f"{event.name} run={event.run_id} job={event.job_id} channels=[{routes}]",
            extra={"event": event.name, "metadata": event.to_dict()},
        )


class RecordingNotifier(Notifier):
    """Keeps events in the order they were published."""

    def __init__(self) -> None:
        self.events: list[ChainEvent] = []
        self.channels: list[tuple[Channel, ...]] = []

    def publish(self, event: ChainEvent, channels: Sequence[Channel]) -> None:
        self.events.append(event)
        self.channels.append(tuple(channels))

    def of_type(self, event_type: type) -> list[ChainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        self.events.clear()
        self.channels.clear()


class CallbackNotifier(Notifier):
    """Forwards events to a callable, e.g. a pub/sub client's publish."""

    def __init__(self, callback: Callable[[ChainEvent, Sequence[Channel]], None]):
        self._callback = callback

    def publish(self, event: ChainEvent, channels: Sequence[Channel]) -> None:
        self._callback(event, channels)


class CompositeNotifier(Notifier):
    """Fans each event out to several notifiers, in order."""

    def __init__(self, notifiers: Iterable[Notifier]):
        self._notifiers = list(notifiers)

    def publish(self, event: ChainEvent, channels: Sequence[Channel]) -> None:
        for notifier in self._notifiers:
            notifier.publish(event, channels)
