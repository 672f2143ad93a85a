"""Node activation: collecting a fingerprint and trading it for a node certificate."""

from __future__ import annotations

import json
import logging
import os
import random
import ssl
import threading
import time
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Protocol

from .activate_server import ActivateServer

log = logging.getLogger(__name__)

DEFAULT_SN_PATH = "var/lib/baetyl/sn"
ENV_KUBE_NODE_NAME = "KUBE_NODE_NAME"

PostFunc = Callable[[str, bytes, Mapping[str, str]], bytes]


class Proof(str, Enum):
    """Where the fingerprint value of a node comes from."""

    INPUT = "input"
    SN = "sn"
    HOSTNAME = "hostName"
    MACHINE_ID = "machineID"
    SYSTEM_UUID = "systemUUID"
    BOOT_ID = "bootID"


@dataclass
class Fingerprint:
    proof: Proof | str = Proof.INPUT
    value: str = ""


@dataclass
class Attribute:
    """A value collected from the user and sent along with the activation."""

    name: str = ""
    value: str = ""
    label: str = ""
    desc: str = ""


@dataclass
class ActivateConfig:
    """Settings of the activation: batch, server, fingerprints and output files."""

    batch_name: str = ""
    batch_namespace: str = ""
    security_type: str = ""
    security_key: str = ""
    address: str = ""
    url: str = "/v1/active"
    interval: float = 60.0
    ca: str = ""
    cert: str = ""
    key: str = ""
    insecure_skip_verify: bool = False
    fingerprints: list[Fingerprint] = field(default_factory=list)
    attributes: list[Attribute] = field(default_factory=list)
    listen: str = ""
    pages: str = ""
    node_ca: str = "var/lib/baetyl/node/ca.pem"
    node_cert: str = "var/lib/baetyl/node/client.pem"
    node_key: str = "var/lib/baetyl/node/client.key"
    sn_path: str = DEFAULT_SN_PATH
    node_name: str = field(default_factory=lambda: os.environ.get(ENV_KUBE_NODE_NAME, ""))


class ProofTypeNotSupportedError(ValueError):
    """The proof type is not supported."""

    def __init__(self, proof: Any = "") -> None:
        super().__init__(f"the proof type is not supported: {proof}")


class MasterNodeInfoError(LookupError):
    """The information of the master node could not be obtained."""

    def __init__(self) -> None:
        super().__init__("failed to get master node info")


class NodeInfoCollector(Protocol):
    def collect_node_info(self) -> Mapping[str, Any]: ...


def _node_field(info: Any, attribute: str, key: str) -> str:
    if isinstance(info, Mapping):
        return str(info.get(key, info.get(attribute, "")) or "")
    return str(getattr(info, attribute, "") or "")


def _write_file(path: str, data: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(data)


def _default_post(config: ActivateConfig) -> PostFunc:
    def post(url: str, data: bytes, headers: Mapping[str, str]) -> bytes:
        context = None
        if url.startswith("https"):
            context = ssl.create_default_context(cafile=config.ca or None)
            if config.cert and config.key:
                context.load_cert_chain(config.cert, config.key)
            if config.insecure_skip_verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
        request = urllib.request.Request(url, data=data, headers=dict(headers), method="POST")
        with urllib.request.urlopen(request, context=context) as response:
            return response.read()

    return post


class Activate:
    """Activates the node, either periodically or from a web form.

    ``post`` is called with the URL, the JSON body and the headers and returns
    the response body; it raises when the server reports an error.
    """

    def __init__(
        self,
        config: ActivateConfig,
        ami: NodeInfoCollector,
        post: PostFunc | None = None,
    ) -> None:
        self.config = config
        self._ami = ami
        self._post = post if post is not None else _default_post(config)
        self.attrs: dict[str, str] = {a.name: a.value for a in config.attributes}
        self._activated = threading.Event()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self._server: ActivateServer | None = None

    def start(self) -> None:
        """Activate in the background, or serve the activation form if configured."""
        self._stopped.clear()
        if self.config.listen:
            self._server = ActivateServer(self, self.config.listen, self.config.pages)
            target = self._serve
        else:
            target = self._activating
        self._thread = threading.Thread(target=target, daemon=True)
        self._thread.start()

    def close(self) -> None:
        if self._server is not None:
            self._server.shutdown()
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def wait_and_close(self, timeout: float | None = None) -> bool:
        """Wait until the node is activated, then stop; False when the wait timed out."""
        activated = self._activated.wait(timeout)
        if not activated:
            log.error("activation did not complete")
        self.close()
        return activated

    def _serve(self) -> None:
        try:
            self._server.serve()
        except Exception as exc:
            log.error("active server: %s", exc)

    def _activating(self) -> None:
        self.activate()
        while not self._stopped.wait(self.config.interval):
            time.sleep(random.randrange(100) / 1000)
            self.activate()

    def activate(self) -> bool:
        """Send one activation request and write the returned certificate."""
        try:
            fingerprint = self.collect()
        except Exception as exc:
            log.error("failed to get fingerprint value: %s", exc)
            return False
        if not fingerprint:
            log.error("fingerprint value is null")
            return False
        body = json.dumps(
            {
                "batchName": self.config.batch_name,
                "namespace": self.config.batch_namespace,
                "fingerprintValue": fingerprint,
                "securityType": self.config.security_type,
                "securityValue": self.config.security_key,
                "penetrateData": self.attrs,
            }
        ).encode()
        log.debug("active info data: %s", body)
        url = f"{self.config.address}{self.config.url}"
        try:
            data = self._post(url, body, {"Content-Type": "application/json"})
        except Exception as exc:
            log.error("failed to send activate data: %s", exc)
            return False
        try:
            response = json.loads(data)
            certificate = response.get("certificate") or {}
        except (ValueError, AttributeError) as exc:
            log.error("failed to unmarshal activate response data returned: %s", exc)
            return False
        try:
            self._gen_cert(certificate)
        except OSError as exc:
            log.error("failed to create cert file: %s", exc)
            return False
        self._activated.set()
        return True

    def _gen_cert(self, certificate: Mapping[str, Any]) -> None:
        _write_file(self.config.node_ca, str(certificate.get("ca", "")))
        _write_file(self.config.node_cert, str(certificate.get("cert", "")))
        _write_file(self.config.node_key, str(certificate.get("key", "")))

    def collect(self) -> str:
        """Compute the fingerprint value from the first configured fingerprint."""
        fingerprints = self.config.fingerprints
        if not fingerprints:
            return ""
        infos = self._ami.collect_node_info() or {}
        if self.config.node_name not in infos:
            raise MasterNodeInfoError()
        info = infos[self.config.node_name]
        if info is None:
            raise MasterNodeInfoError()
        fingerprint = fingerprints[0]
        proof = fingerprint.proof
        proof = proof.value if isinstance(proof, Proof) else proof
        if proof == Proof.INPUT.value:
            return self.attrs.get(fingerprint.value, "")
        if proof == Proof.SN.value:
            path = os.path.join(self.config.sn_path, fingerprint.value)
            with open(path, encoding="utf-8") as fh:
                return fh.read().strip()
        if proof == Proof.HOSTNAME.value:
            return _node_field(info, "hostname", "hostname")
        if proof == Proof.MACHINE_ID.value:
            return _node_field(info, "machine_id", "machineID")
        if proof == Proof.SYSTEM_UUID.value:
            return _node_field(info, "system_uuid", "systemUUID")
        if proof == Proof.BOOT_ID.value:
            return _node_field(info, "boot_id", "bootID")
        raise ProofTypeNotSupportedError(proof)