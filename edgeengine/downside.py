"""Handling of downside messages: remote debugging chains and node labelling."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Mapping, Protocol

from .engine import TOPIC_DOWNSIDE, Pubsub
from .models import BAETYL_CORE, Message

log = logging.getLogger(__name__)

TOPIC_UPSIDE = "upside"

MESSAGE_CMD = "cmd"
MESSAGE_DATA = "data"

COMMAND_CONNECT = "connect"
COMMAND_DISCONNECT = "disconnect"
COMMAND_LOGS = "logs"
COMMAND_NODE_LABEL = "nodeLabel"
COMMAND_MULTI_NODE_LABELS = "multiNodeLabels"

ERR_CREATE_CHAIN = "failed to create new chain"
ERR_CLOSE_CHAIN = "failed to close connected chain"
ERR_GET_CHAIN = "failed to get connected chain"
ERR_PUBLISH_DOWNSIDE_CHAIN = "failed to publish downside chain"
ERR_EXEC_DATA = "failed to exec"
ERR_SUB_NODE_NAME = "failed to get sub node name"
ERR_TIMEOUT = "engine timeout"

EXIT_CMD = "exit\n"

assert TOPIC_DOWNSIDE  # the chains subscribe to per-key derivatives of this topic


class DownsideError(RuntimeError):
    """Raised when a downside message cannot be handled."""


class Chain(Protocol):
    def debug(self) -> None: ...

    def view_logs(self, options: Any) -> None: ...

    def close(self) -> None: ...


class NodeLabeler(Protocol):
    def update_node_labels(self, name: str, labels: Mapping[str, str]) -> None: ...


def _decode(content: Any) -> Any:
    if isinstance(content, (bytes, bytearray, str)):
        return json.loads(content)
    return content


class DownsideHandler:
    """Dispatches downside messages to debugging chains and the node labeller.

    ``chain_factory`` is called with the message metadata and returns a chain.
    Only the core service handles these messages; others ignore them.
    """

    def __init__(
        self,
        pubsub: Pubsub,
        ami: NodeLabeler,
        chain_factory: Callable[[Mapping[str, str]], Chain],
        service_name: str,
    ) -> None:
        self._pubsub = pubsub
        self._ami = ami
        self._chain_factory = chain_factory
        self._service_name = service_name
        self._chains: dict[str, Chain] = {}
        self._lock = threading.Lock()

    def on_message(self, msg: Message) -> None:
        log.debug("engine downside msg: %s", msg)
        if self._service_name != BAETYL_CORE:
            return
        meta = msg.metadata
        key = "_".join(
            meta.get(name, "") for name in ("namespace", "name", "container", "token")
        )
        downside = f"{key}_down"

        if msg.kind == MESSAGE_CMD:
            command = meta.get("cmd", "")
            handlers = {
                COMMAND_CONNECT: self._connect,
                COMMAND_LOGS: self._view_logs,
                COMMAND_DISCONNECT: self._disconnect,
                COMMAND_NODE_LABEL: self._node_label,
                COMMAND_MULTI_NODE_LABELS: self._label_multi_nodes,
            }
            handler = handlers.get(command)
            if handler is None:
                log.debug("unknown command: %s", command)
                return
            handler(key, msg)
        elif msg.kind == MESSAGE_DATA:
            with self._lock:
                known = key in self._chains
            if not known:
                self._publish_failed(key, ERR_GET_CHAIN, msg)
                raise DownsideError(ERR_GET_CHAIN + key)
            try:
                self._pubsub.publish(downside, msg)
            except Exception as exc:
                log.error("%s: %s", ERR_PUBLISH_DOWNSIDE_CHAIN, exc)
                self._publish_failed(key, ERR_PUBLISH_DOWNSIDE_CHAIN, msg)
                raise DownsideError(str(exc)) from exc
        else:
            log.warning("remote debug message kind not support: %s", msg)

    def on_timeout(self) -> None:
        self._pubsub.publish(
            TOPIC_UPSIDE,
            Message(kind=MESSAGE_CMD, metadata={"success": "false", "msg": ERR_TIMEOUT}),
        )

    def _close_old(self, key: str) -> None:
        with self._lock:
            old = self._chains.pop(key, None)
        if old is None:
            return
        try:
            old.close()
        except Exception:
            log.warning("failed to close old chain %s", key)
        log.debug("close chain %s", key)

    def _new_chain(self, key: str, msg: Message) -> Chain:
        try:
            return self._chain_factory(msg.metadata)
        except Exception as exc:
            self._publish_failed(key, ERR_CREATE_CHAIN, msg)
            raise DownsideError(str(exc)) from exc

    def _view_logs(self, key: str, msg: Message) -> None:
        self._close_old(key)
        log.debug("new chain %s", key)
        try:
            options = _decode(msg.content)
        except ValueError as exc:
            self._publish_failed(key, str(exc), msg)
            raise DownsideError(str(exc)) from exc
        chain = self._new_chain(key, msg)
        try:
            chain.view_logs(options)
        except Exception as exc:
            self._publish_failed(key, ERR_EXEC_DATA, msg)
            raise DownsideError(str(exc)) from exc
        with self._lock:
            self._chains[key] = chain

    def _connect(self, key: str, msg: Message) -> None:
        self._close_old(key)
        log.debug("new chain %s", key)
        chain = self._new_chain(key, msg)
        try:
            chain.debug()
        except Exception as exc:
            self._publish_failed(key, ERR_EXEC_DATA, msg)
            raise DownsideError(str(exc)) from exc
        with self._lock:
            self._chains[key] = chain

    def _send_exit(self, key: str) -> None:
        try:
            self._pubsub.publish(
                f"{key}_down", Message(kind=MESSAGE_DATA, content=EXIT_CMD.encode())
            )
        except Exception as exc:
            log.error("%s: %s", ERR_PUBLISH_DOWNSIDE_CHAIN, exc)

    def _disconnect(self, key: str, msg: Message) -> None:
        with self._lock:
            chain = self._chains.get(key)
        if chain is None:
            return
        self._send_exit(key)
        try:
            chain.close()
        except Exception as exc:
            self._publish_failed(key, ERR_CLOSE_CHAIN, msg)
            raise DownsideError(str(exc)) from exc
        with self._lock:
            self._chains.pop(key, None)

    def _node_label(self, key: str, msg: Message) -> None:
        node_name = msg.metadata.get("subName")
        if node_name is None:
            self._publish_failed(key, ERR_SUB_NODE_NAME, msg)
            raise DownsideError(ERR_SUB_NODE_NAME)
        try:
            labels = _decode(msg.content) or {}
            self._ami.update_node_labels(node_name, labels)
        except Exception as exc:
            self._publish_failed(key, str(exc), msg)
            raise DownsideError(str(exc)) from exc
        self._publish_success(key, msg)

    def _label_multi_nodes(self, key: str, msg: Message) -> None:
        try:
            nodes_labels = _decode(msg.content) or {}
        except ValueError as exc:
            raise DownsideError(str(exc)) from exc
        errors = []
        for name, labels in nodes_labels.items():
            try:
                self._ami.update_node_labels(name, labels)
            except Exception as exc:
                log.warning("%s", exc)
                errors.append(str(exc))
        if errors:
            joined = "\n".join(errors)
            self._publish_failed(key, joined, msg)
            raise DownsideError(joined)
        self._publish_success(key, msg)

    def _publish_upside(self, key: str, metadata: dict[str, str]) -> None:
        try:
            self._pubsub.publish(TOPIC_UPSIDE, Message(kind=MESSAGE_CMD, metadata=metadata))
        except Exception as exc:
            log.error("failed to publish message on %s for chain %s: %s", TOPIC_UPSIDE, key, exc)

    def _publish_failed(self, key: str, reason: str, msg: Message) -> None:
        self._publish_upside(
            key,
            {"success": "false", "msg": reason, "token": msg.metadata.get("token", "")},
        )

    def _publish_success(self, key: str, msg: Message) -> None:
        self._publish_upside(key, {"success": "true", "token": msg.metadata.get("token", "")})