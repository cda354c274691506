"""Handling of downside commands: remote debugging, log viewing and node labels."""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Callable, Mapping

from .models import (
    BAETYL_CORE,
    COMMAND_CONNECT,
    COMMAND_DISCONNECT,
    COMMAND_LOGS,
    COMMAND_MULTI_NODE_LABELS,
    COMMAND_NODE_LABEL,
    MESSAGE_CMD,
    MESSAGE_DATA,
    Message,
)

TOPIC_UPSIDE = "upside"
TOPIC_DOWNSIDE = "downside"

ENV_SERVICE_NAME = "BAETYL_SERVICE_NAME"

ERR_CREATE_CHAIN = "failed to create new chain"
ERR_CLOSE_CHAIN = "failed to close connected chain"
ERR_GET_CHAIN = "failed to get connected chain"
ERR_PUBLISH_DOWNSIDE_CHAIN = "failed to publish downside chain"
ERR_EXEC_DATA = "failed to exec"
ERR_SUB_NODE_NAME = "failed to get sub node name"
ERR_TIMEOUT = "engine timeout"

EXIT_CMD = "exit\n"

_log = logging.getLogger(__name__)


def _unmarshal(content: Any, default: Any) -> Any:
    """Decode message content that may be raw JSON or an already decoded value."""
    if content is None:
        return default
    if isinstance(content, (bytes, bytearray)):
        content = bytes(content).decode("utf-8")
    if isinstance(content, str):
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid message content: {exc}") from exc
    return content


def _as_labels(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise ValueError("labels must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


class DownsideHandler:
    """Processes messages arriving on the downside topic.

    ``pubsub`` provides ``publish(topic, message)``; ``ami`` provides
    ``update_node_labels(node_name, labels)``; ``chain_factory(metadata)``
    returns a chain object with ``debug()``, ``view_logs(options)`` and
    ``close()``. Only the core service handles these messages.
    """

    def __init__(
        self,
        pubsub: Any,
        ami: Any,
        chain_factory: Callable[[Mapping[str, str]], Any],
        service_name: str | None = None,
    ) -> None:
        self.pubsub = pubsub
        self.ami = ami
        self.chain_factory = chain_factory
        self.service_name = (
            os.environ.get(ENV_SERVICE_NAME, "") if service_name is None else service_name
        )
        self.chains: dict[str, Any] = {}
        self._lock = threading.Lock()

    def on_message(self, msg: Message) -> None:
        _log.debug("engine downside msg: %r", msg)
        if self.service_name != BAETYL_CORE:
            return

        meta = msg.metadata
        key = "_".join(
            meta.get(part, "") for part in ("namespace", "name", "container", "token")
        )
        downside = f"{key}_down"

        if msg.kind == MESSAGE_CMD:
            command = meta.get("cmd", "")
            action = {
                COMMAND_CONNECT: self._connect,
                COMMAND_LOGS: self._view_logs,
                COMMAND_DISCONNECT: self._disconnect,
                COMMAND_NODE_LABEL: self._node_label,
                COMMAND_MULTI_NODE_LABELS: self._label_multi_nodes,
            }.get(command)
            if action is None:
                _log.debug("unknown command: %r", command)
                return
            action(key, msg)
        elif msg.kind == MESSAGE_DATA:
            with self._lock:
                known = key in self.chains
            if not known:
                self._publish_failed(key, ERR_GET_CHAIN, msg)
                raise LookupError(ERR_GET_CHAIN + key)
            try:
                self.pubsub.publish(downside, msg)
            except Exception:
                _log.exception(ERR_PUBLISH_DOWNSIDE_CHAIN)
                self._publish_failed(key, ERR_PUBLISH_DOWNSIDE_CHAIN, msg)
                raise
        else:
            _log.warning("remote debug message kind not supported: %r", msg)

    def on_timeout(self) -> None:
        self.pubsub.publish(
            TOPIC_UPSIDE,
            Message(kind=MESSAGE_CMD, metadata={"success": "false", "msg": ERR_TIMEOUT}),
        )

    def _close_old(self, key: str) -> None:
        with self._lock:
            old = self.chains.pop(key, None)
        if old is None:
            return
        try:
            old.close()
        except Exception:
            _log.warning("failed to close old chain %s", key)
        _log.debug("closed chain %s", key)

    def _new_chain(self, key: str, msg: Message) -> Any:
        try:
            return self.chain_factory(msg.metadata)
        except Exception:
            self._publish_failed(key, ERR_CREATE_CHAIN, msg)
            raise

    def _view_logs(self, key: str, msg: Message) -> None:
        self._close_old(key)
        try:
            options = _unmarshal(msg.content, {})
        except ValueError as exc:
            self._publish_failed(key, str(exc), msg)
            raise
        chain = self._new_chain(key, msg)
        try:
            chain.view_logs(options)
        except Exception:
            self._publish_failed(key, ERR_EXEC_DATA, msg)
            raise
        with self._lock:
            self.chains[key] = chain

    def _connect(self, key: str, msg: Message) -> None:
        self._close_old(key)
        chain = self._new_chain(key, msg)
        try:
            chain.debug()
        except Exception:
            self._publish_failed(key, ERR_EXEC_DATA, msg)
            raise
        with self._lock:
            self.chains[key] = chain

    def _send_exit(self, key: str) -> None:
        exit_msg = Message(kind=MESSAGE_DATA, content=EXIT_CMD.encode())
        try:
            self.pubsub.publish(f"{key}_down", exit_msg)
        except Exception:
            _log.exception(ERR_PUBLISH_DOWNSIDE_CHAIN)

    def _disconnect(self, key: str, msg: Message) -> None:
        with self._lock:
            chain = self.chains.get(key)
        if chain is None:
            return
        self._send_exit(key)
        try:
            chain.close()
        except Exception:
            self._publish_failed(key, ERR_CLOSE_CHAIN, msg)
            raise
        with self._lock:
            self.chains.pop(key, None)

    def _node_label(self, key: str, msg: Message) -> None:
        node_name = msg.metadata.get("subName")
        if node_name is None:
            self._publish_failed(key, ERR_SUB_NODE_NAME, msg)
            raise LookupError(ERR_SUB_NODE_NAME)
        try:
            labels = _as_labels(_unmarshal(msg.content, {}))
            self.ami.update_node_labels(node_name, labels)
        except Exception as exc:
            self._publish_failed(key, str(exc), msg)
            raise
        self._publish_success(key, msg)

    def _label_multi_nodes(self, key: str, msg: Message) -> None:
        raw = _unmarshal(msg.content, {})
        if not isinstance(raw, Mapping):
            raise ValueError("node labels must be a mapping")
        nodes = {str(name): _as_labels(labels) for name, labels in raw.items()}

        errors = []
        for name, labels in nodes.items():
            try:
                self.ami.update_node_labels(name, labels)
            except Exception as exc:
                _log.warning("%s", exc)
                errors.append(str(exc))
        if errors:
            joined = "\n".join(errors)
            self._publish_failed(key, joined, msg)
            raise RuntimeError(joined)
        self._publish_success(key, msg)

    def _publish_failed(self, key: str, reason: str, msg: Message) -> None:
        self._publish_result(
            key,
            {"success": "false", "msg": reason, "token": msg.metadata.get("token", "")},
        )

    def _publish_success(self, key: str, msg: Message) -> None:
        self._publish_result(key, {"success": "true", "token": msg.metadata.get("token", "")})

    def _publish_result(self, key: str, metadata: dict[str, str]) -> None:
        try:
            self.pubsub.publish(TOPIC_UPSIDE, Message(kind=MESSAGE_CMD, metadata=metadata))
        except Exception:
            _log.exception("failed to publish message to %s for chain %s", TOPIC_UPSIDE, key)