"""Forwarding of node property changes from the event topic to the MQTT broker."""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from .engine import Pubsub
from .models import Message

log = logging.getLogger(__name__)

TOPIC_EVENT = "event"
MESSAGE_NODE_PROPS = "nodeProps"


@dataclass
class EventConfig:
    """Where node property changes are published."""

    publish_topic: str = "$baetyl/node/props"
    publish_qos: int = 0


class MqttClient(Protocol):
    def start(self) -> None: ...

    def publish(self, qos: int, topic: str, payload: bytes) -> None: ...

    def close(self) -> Any: ...


class EventHandler:
    """Publishes non-empty node property deltas to the broker."""

    def __init__(self, mqtt: MqttClient, config: EventConfig) -> None:
        self._mqtt = mqtt
        self._config = config
        self.timeouts = 0

    def on_message(self, msg: Message) -> None:
        if msg.kind != MESSAGE_NODE_PROPS:
            log.debug("message kind not support yet: %s", msg.kind)
            return
        content = msg.content
        delta = json.loads(content) if isinstance(content, (bytes, bytearray, str)) else content
        if delta is None:
            delta = {}
        if not isinstance(delta, Mapping):
            raise ValueError("node props delta must be an object")
        if not delta:
            return
        payload = json.dumps(delta, sort_keys=True, separators=(",", ":")).encode()
        self._mqtt.publish(self._config.publish_qos, self._config.publish_topic, payload)
        log.debug("send node props to mqtt broker successfully: %s", delta)

    def on_timeout(self) -> int:
        """Record an idle period; nothing is published. Returns the count so far."""
        self.timeouts += 1
        return self.timeouts


class EventX:
    """Subscribes to the event topic and feeds its messages to an EventHandler."""

    def __init__(self, config: EventConfig, pubsub: Pubsub, mqtt: MqttClient) -> None:
        self._pubsub = pubsub
        self._mqtt = mqtt
        self._channel = pubsub.subscribe(TOPIC_EVENT)
        self._handler = EventHandler(mqtt, config)
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        try:
            self._mqtt.start()
        except Exception as exc:
            log.warning("failed to start mqtt client: %s", exc)
        self._stopped.clear()
        self._thread = threading.Thread(target=self._process, daemon=True)
        self._thread.start()

    def _process(self) -> None:
        while not self._stopped.is_set():
            try:
                msg = self._channel.get(timeout=0.05)
            except queue.Empty:
                continue
            try:
                self._handler.on_message(msg)
            except Exception as exc:
                log.error("failed to handle event message: %s", exc)

    def close(self) -> Any:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        return self._mqtt.close()

    def __enter__(self) -> EventX:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()