"""
Backup lifecycle events and sinks.

Events are plain immutable records. A sink is any object with a
handle(event) method; emit() delivers an event and never lets a sink
failure escape into the backup.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManifestCreated:
    entry_count: int
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ArchiveCreated:
    path: str
    size: int
    entry_count: int


@dataclass(frozen=True)
class DestinationWriteSucceeded:
    disk_name: str


@dataclass(frozen=True)
class JobFailed:
    error: BaseException
    disk_name: Optional[str] = None
    stage: Optional[str] = None


class LoggingEventSink:
    """Writes every event to the log."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def handle(self, event):
        if isinstance(event, ManifestCreated):
            self.log.info(f"Manifest created with {event.entry_count} entries")
        elif isinstance(event, ArchiveCreated):
            self.log.info(f"Archive created: {event.path} ({event.entry_count} entries, {event.size} bytes)")
        elif isinstance(event, DestinationWriteSucceeded):
            self.log.info(f"Backup copied to {event.disk_name}")
        elif isinstance(event, JobFailed):
            where = f" on {event.disk_name}" if event.disk_name else ''
            stage = f" during {event.stage}" if event.stage else ''
            self.log.error(f"Backup failed{where}{stage}: {event.error}")


class CallbackEventSink:
    """Passes every event to a callable (webhooks, mailers, tests)."""

    def __init__(self, callback: Callable):
        self.callback = callback

    def handle(self, event):
        self.callback(event)


class CompositeEventSink:
    """Fans an event out to several sinks; one failing sink does not stop the others."""

    def __init__(self, sinks: Iterable):
        self.sinks = list(sinks)

    def handle(self, event):
        for sink in self.sinks:
            emit(sink, event)


def emit(sink, event) -> bool:
    """
    Deliver an event, logging and swallowing any sink failure.

    Returns:
        True if the sink accepted the event
    """
    if sink is None:
        return False
    try:
        sink.handle(event)
        return True
    except Exception as e:
        logger.error(f"Sending notification {type(event).__name__} failed: {e}")
        return False
