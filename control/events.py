# control/events.py

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

BLOCK_START = "block_start"
BLOCK_END = "block_end"
STATE_CHANGE = "state_change"
LOG = "log"


def _now_iso8601_utc_ms() -> str:
    now = datetime.now(tz=timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class FlowEvent:
    kind: str
    session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp_utc: str = field(default_factory=_now_iso8601_utc_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventSink(Protocol):
    def emit(self, event: FlowEvent) -> None:
        ...


class RecordingEventSink:
    """Keeps every event in memory; used by tests and the CLI's dry runs."""

    def __init__(self):
        self.events: List[FlowEvent] = []

    def emit(self, event: FlowEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> List[FlowEvent]:
        return [e for e in self.events if e.kind == kind]


class LoggingEventSink:
    _LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def emit(self, event: FlowEvent) -> None:
        if event.kind == LOG:
            level = self._LEVELS.get(str(event.payload.get("level", "info")), logging.INFO)
            logger.log(level, f"[{event.session_id}] {event.payload.get('message')}")
        else:
            logger.debug(f"[{event.session_id}] {event.kind}: {event.payload}")


class MQTTEventSink:
    """Publishes events as JSON to <prefix>sessions/<session_id>/events."""

    def __init__(self, client: mqtt.Client, topic_prefix: str, qos: int = 0):
        self.client = client
        self.topic_prefix = topic_prefix
        self.qos = qos

    def emit(self, event: FlowEvent) -> None:
        topic = f"{self.topic_prefix}sessions/{event.session_id}/events"
        message = json.dumps(event.to_dict(), separators=(",", ":"), default=str)
        info = self.client.publish(topic, message, qos=self.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(f"Failed to publish {event.kind} event to '{topic}' (rc={info.rc})")


class FanOutEventSink:
    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def emit(self, event: FlowEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                # A broken observer must not take down the session it observes.
                logger.error(f"Event sink {type(sink).__name__} failed on {event.kind}: {e}", exc_info=True)


def optional_sink(sink: Optional[EventSink]) -> EventSink:
    return sink if sink is not None else LoggingEventSink()
