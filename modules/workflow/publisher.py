"""Change publisher.

Observers subscribe per entity channel. Publishing is fire-and-forget:
a transport error is logged and never reaches the step that triggered it.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from collections import OrderedDict, deque
from threading import Lock
from typing import Any, Deque, Dict, List, Protocol, Tuple

from config.settings import settings

logger = logging.getLogger(__name__)

HOST_EVENT = "HostProvisioningStatusUpdated"
WORKSPACE_EVENT = "WorkspaceStatusUpdated"
RECORDS_CHANNEL = "script-job-runs"
RECORD_CREATED_EVENT = "ScriptJobRunCreated"
RECORD_UPDATED_EVENT = "ScriptJobRunStatusUpdated"


@dataclass
class ChangeEvent:
    channel: str
    event: str
    payload: Dict[str, Any]
    published_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "event": self.event,
            "payload": self.payload,
            "published_at": self.published_at,
        }


class ChangePublisher(Protocol):
    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class _ChannelLog:
    """Recent events of one channel; ``dropped`` counts events trimmed off the front."""

    def __init__(self, max_events: int) -> None:
        self.events: Deque[ChangeEvent] = deque(maxlen=max_events)
        self.dropped = 0

    def append(self, event: ChangeEvent) -> None:
        if len(self.events) == self.events.maxlen:
            self.dropped += 1
        self.events.append(event)


class InMemoryChangePublisher:
    """Keeps recent events per channel for polling observers.

    Each channel holds at most ``max_events`` events and at most
    ``max_channels`` channels are kept, least recently published dropped
    first. Read cursors are absolute event indexes, so they stay valid
    after older events are trimmed.
    """

    def __init__(
        self,
        max_events: int = settings.EVENT_HISTORY_PER_CHANNEL,
        max_channels: int = settings.EVENT_CHANNELS_MAX,
    ) -> None:
        self.max_events = max_events
        self.max_channels = max_channels
        self._lock = Lock()
        self._channels: "OrderedDict[str, _ChannelLog]" = OrderedDict()

    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            log = self._channels.get(channel)
            if log is None:
                log = self._channels[channel] = _ChannelLog(self.max_events)
            self._channels.move_to_end(channel)
            log.append(ChangeEvent(channel=channel, event=event, payload=payload))
            while len(self._channels) > self.max_channels:
                self._channels.popitem(last=False)

    def read_events(self, channel: str, start_index: int = 0) -> Tuple[List[ChangeEvent], int]:
        """Events from ``start_index`` on and the cursor to read from next time"""
        with self._lock:
            log = self._channels.get(channel)
            if log is None:
                return [], start_index
            offset = max(start_index - log.dropped, 0)
            events = list(log.events)[offset:]
            return events, max(start_index, log.dropped + len(log.events))

    def list_events(self, channel: str, start_index: int = 0) -> List[ChangeEvent]:
        events, _ = self.read_events(channel, start_index)
        return events

    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)


class LoggingChangePublisher:
    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"📣 {event} on {channel}: status={payload.get('status')} step={payload.get('currentStep')}")


def safe_publish(publisher: ChangePublisher, channel: str, event: str, payload: Dict[str, Any]) -> None:
    try:
        publisher.publish(channel, event, payload)
    except Exception as e:
        logger.warning(f"Could not publish {event} on {channel}: {e}")


def entity_event_name(entity: Any) -> str:
    channel = entity.workflow_channel
    return HOST_EVENT if channel.startswith("host-updates.") else WORKSPACE_EVENT


def broadcast_entity(publisher: ChangePublisher, entity: Any) -> None:
    """Publish ``{id, status, currentStep, metadata}`` on the entity's channel."""
    metadata = dict(entity.meta or {})
    payload = {
        "id": str(entity.id),
        "status": entity.status,
        "currentStep": metadata.get("current_step"),
        "metadata": metadata,
    }
    safe_publish(publisher, entity.workflow_channel, entity_event_name(entity), payload)


def broadcast_record(publisher: ChangePublisher, record: Any, created: bool = False) -> None:
    payload = {
        "id": str(record.id),
        "status": record.status,
        "script_name": record.script_name,
        "exit_code": record.exit_code,
        "host_id": str(record.host_id) if record.host_id else None,
        "attempt_id": str(record.attempt_id) if record.attempt_id else None,
    }
    event = RECORD_CREATED_EVENT if created else RECORD_UPDATED_EVENT
    safe_publish(publisher, RECORDS_CHANNEL, event, payload)


def build_publisher(mode: str = settings.CHANGE_PUBLISHER) -> ChangePublisher:
    """'log' only logs events; anything else keeps them in memory for polling"""
    if mode == "log":
        return LoggingChangePublisher()
    return InMemoryChangePublisher()


# Global instance
change_publisher = build_publisher()
