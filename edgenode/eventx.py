"""Forwarding of node events from the internal bus to the MQTT broker."""

from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Any, Mapping

from .config import Config, EventConfig
from .models import MESSAGE_NODE_PROPS, Message

TOPIC_EVENT = "event"

_log = logging.getLogger(__name__)


class EventHandler:
    """Publishes node property deltas to the broker.

    ``mqtt`` provides ``publish(topic, payload, qos=..., retain=...)``.
    """

    def __init__(self, mqtt: Any, cfg: EventConfig) -> None:
        self.mqtt = mqtt
        self.cfg = cfg

    def on_message(self, msg: Message) -> None:
        if not isinstance(msg, Message):
            raise TypeError(f"unexpected message type {type(msg).__name__}")
        if msg.kind != MESSAGE_NODE_PROPS:
            _log.debug("message kind not supported yet: %r", msg.kind)
            return
        delta = msg.content
        if isinstance(delta, (bytes, bytearray, str)):
            try:
                delta = json.loads(delta)
            except ValueError as exc:
                raise ValueError(f"invalid node props content: {exc}") from exc
        if not delta:
            return
        if not isinstance(delta, Mapping):
            raise ValueError("node props content must be a mapping")
        payload = json.dumps(dict(delta), sort_keys=True, separators=(",", ":")).encode()
        self.mqtt.publish(self.cfg.publish_topic, payload, qos=self.cfg.publish_qos, retain=False)
        _log.debug("sent node props to mqtt broker: %r", delta)

    def on_timeout(self) -> None:
        """Nothing is done when no events arrive."""


class EventX:
    """Subscribes to the event topic and relays events to the broker.

    ``pubsub.subscribe(topic)`` must return a ``queue.Queue`` of messages;
    ``mqtt`` provides ``start()``, ``close()`` and ``publish``.
    """

    _POLL = 0.05

    def __init__(self, pubsub: Any, mqtt: Any, cfg: Config) -> None:
        self.pubsub = pubsub
        self.mqtt = mqtt
        self._channel = pubsub.subscribe(TOPIC_EVENT)
        self.handler = EventHandler(mqtt, cfg.event)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                msg = self._channel.get(timeout=self._POLL)
            except queue.Empty:
                continue
            try:
                self.handler.on_message(msg)
            except Exception:
                _log.exception("failed to handle message")

    def start(self) -> None:
        try:
            self.mqtt.start()
        except Exception as exc:
            _log.warning("failed to start mqtt client: %s", exc)
        if self._thread is None:
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.mqtt.close()

    def __enter__(self) -> "EventX":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()