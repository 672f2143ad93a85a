import json

import pytest

from edgeengine.downside import (
    COMMAND_CONNECT,
    COMMAND_DISCONNECT,
    COMMAND_LOGS,
    COMMAND_MULTI_NODE_LABELS,
    COMMAND_NODE_LABEL,
    ERR_CREATE_CHAIN,
    ERR_GET_CHAIN,
    ERR_SUB_NODE_NAME,
    ERR_TIMEOUT,
    EXIT_CMD,
    MESSAGE_CMD,
    MESSAGE_DATA,
    TOPIC_UPSIDE,
    DownsideError,
    DownsideHandler,
)
from edgeengine.models import BAETYL_CORE, BAETYL_INIT, Message

META = {"namespace": "ns", "name": "pod", "container": "c", "token": "token"}
KEY = "ns_pod_c_token"


class FakePubsub:
    def __init__(self):
        self.published = []

    def publish(self, topic, message):
        self.published.append((topic, message))


class FakeChain:
    def __init__(self):
        self.debugged = False
        self.closed = False
        self.log_options = None

    def debug(self):
        self.debugged = True

    def view_logs(self, options):
        self.log_options = options

    def close(self):
        self.closed = True


class FakeAmi:
    def __init__(self, failing=()):
        self.labels = {}
        self.failing = set(failing)

    def update_node_labels(self, name, labels):
        if name in self.failing:
            raise RuntimeError(f"cannot label {name}")
        self.labels[name] = labels


@pytest.fixture
def setup():
    pubsub = FakePubsub()
    ami = FakeAmi()
    chains = []

    def factory(metadata):
        chain = FakeChain()
        chains.append(chain)
        return chain

    handler = DownsideHandler(pubsub, ami, factory, BAETYL_CORE)
    return handler, pubsub, ami, chains


def cmd(command, **extra):
    return Message(kind=MESSAGE_CMD, metadata={**META, "cmd": command, **extra})


def test_non_core_service_ignores_messages():
    pubsub = FakePubsub()
    created = []
    handler = DownsideHandler(pubsub, FakeAmi(), created.append, BAETYL_INIT)
    handler.on_message(cmd(COMMAND_CONNECT))
    assert created == []
    assert pubsub.published == []


def test_connect_then_data_is_forwarded(setup):
    handler, pubsub, _, chains = setup
    handler.on_message(cmd(COMMAND_CONNECT))
    assert len(chains) == 1 and chains[0].debugged
    data = Message(kind=MESSAGE_DATA, metadata=dict(META), content=b"ls\n")
    handler.on_message(data)
    assert pubsub.published == [(KEY + "_down", data)]


def test_reconnect_closes_old_chain(setup):
    handler, _, _, chains = setup
    handler.on_message(cmd(COMMAND_CONNECT))
    handler.on_message(cmd(COMMAND_CONNECT))
    assert len(chains) == 2
    assert chains[0].closed
    assert not chains[1].closed


def test_connect_factory_failure_publishes_failure():
    pubsub = FakePubsub()

    def factory(metadata):
        raise RuntimeError("boom")

    handler = DownsideHandler(pubsub, FakeAmi(), factory, BAETYL_CORE)
    with pytest.raises(DownsideError):
        handler.on_message(cmd(COMMAND_CONNECT))
    topic, message = pubsub.published[0]
    assert topic == TOPIC_UPSIDE
    assert message.metadata == {"success": "false", "msg": ERR_CREATE_CHAIN, "token": "token"}


def test_data_without_chain_fails(setup):
    handler, pubsub, _, _ = setup
    with pytest.raises(DownsideError, match=ERR_GET_CHAIN):
        handler.on_message(Message(kind=MESSAGE_DATA, metadata=dict(META)))
    assert pubsub.published[0][1].metadata["msg"] == ERR_GET_CHAIN


def test_disconnect_sends_exit_and_closes(setup):
    handler, pubsub, _, chains = setup
    handler.on_message(cmd(COMMAND_CONNECT))
    handler.on_message(cmd(COMMAND_DISCONNECT))
    topic, message = pubsub.published[0]
    assert topic == KEY + "_down"
    assert message.kind == MESSAGE_DATA
    assert message.content == EXIT_CMD.encode()
    assert chains[0].closed
    with pytest.raises(DownsideError):
        handler.on_message(Message(kind=MESSAGE_DATA, metadata=dict(META)))


def test_disconnect_without_chain_does_nothing(setup):
    handler, pubsub, _, _ = setup
    handler.on_message(cmd(COMMAND_DISCONNECT))
    assert pubsub.published == []


def test_view_logs_passes_options(setup):
    handler, _, _, chains = setup
    msg = cmd(COMMAND_LOGS)
    msg.content = json.dumps({"tailLines": 10}).encode()
    handler.on_message(msg)
    assert chains[0].log_options == {"tailLines": 10}


def test_node_label_requires_sub_name(setup):
    handler, pubsub, _, _ = setup
    with pytest.raises(DownsideError, match=ERR_SUB_NODE_NAME):
        handler.on_message(cmd(COMMAND_NODE_LABEL))
    assert pubsub.published[0][1].metadata["success"] == "false"


def test_node_label_updates_labels(setup):
    handler, pubsub, ami, _ = setup
    msg = cmd(COMMAND_NODE_LABEL, subName="node1")
    msg.content = json.dumps({"role": "edge"})
    handler.on_message(msg)
    assert ami.labels == {"node1": {"role": "edge"}}
    assert pubsub.published[0][1].metadata == {"success": "true", "token": "token"}


def test_multi_node_labels_collects_errors():
    pubsub = FakePubsub()
    ami = FakeAmi(failing={"bad"})
    handler = DownsideHandler(pubsub, ami, lambda m: FakeChain(), BAETYL_CORE)
    msg = cmd(COMMAND_MULTI_NODE_LABELS)
    msg.content = {"good": {"a": "1"}, "bad": {"b": "2"}}
    with pytest.raises(DownsideError, match="cannot label bad"):
        handler.on_message(msg)
    assert ami.labels == {"good": {"a": "1"}}
    assert pubsub.published[0][1].metadata["msg"] == "cannot label bad"


def test_on_timeout_publishes_failure(setup):
    handler, pubsub, _, _ = setup
    handler.on_timeout()
    topic, message = pubsub.published[0]
    assert topic == TOPIC_UPSIDE
    assert message.metadata == {"success": "false", "msg": ERR_TIMEOUT}


def test_unknown_kind_and_command_are_ignored(setup):
    handler, pubsub, _, chains = setup
    handler.on_message(Message(kind="report", metadata=dict(META)))
    handler.on_message(cmd("whatever"))
    assert pubsub.published == []
    assert chains == []