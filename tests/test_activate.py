import json

import pytest

from edgeengine.activate import (
    Activate,
    ActivateConfig,
    Attribute,
    Fingerprint,
    MasterNodeInfoError,
    Proof,
    ProofTypeNotSupportedError,
)

RESPONSE = {
    "nodeName": "node.test",
    "namespace": "default",
    "certificate": {
        "ca": "ca info",
        "key": "key info",
        "cert": "cert info",
        "name": "name info",
        "insecureSkipVerify": False,
    },
}

NODE_INFO = {
    "hostname": "docker-desktop",
    "address": "192.168.1.77",
    "arch": "amd64",
    "machineID": "machine-id-0001",
    "bootID": "boot-id-0001",
    "systemUUID": "system-uuid-0001",
}

SERIAL = "made-up-serial-0001"


class FakeAmi:
    def __init__(self, infos=None, error=None):
        self.infos = infos
        self.error = error
        self.calls = 0

    def collect_node_info(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.infos


class FakePost:
    def __init__(self, response=RESPONSE, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def __call__(self, url, data, headers):
        self.requests.append((url, json.loads(data), dict(headers)))
        if self.error is not None:
            raise self.error
        return json.dumps(self.response).encode()


def make_config(tmp_path, fingerprints, **kwargs):
    sn_dir = tmp_path / "sn"
    sn_dir.mkdir(exist_ok=True)
    (sn_dir / "fv.txt").write_text(SERIAL + "\n")
    certs = tmp_path / "certs"
    return ActivateConfig(
        batch_name="batch.test",
        batch_namespace="default",
        security_type="Token",
        security_key="token",
        address="http://activate.example.com",
        interval=5,
        fingerprints=fingerprints,
        attributes=[Attribute(name="abc", value="abc")],
        node_ca=str(certs / "ca.pem"),
        node_cert=str(certs / "client.pem"),
        node_key=str(certs / "client.key"),
        sn_path=str(sn_dir),
        node_name="knn",
        **kwargs,
    )


GOOD_CASES = [
    (Fingerprint(Proof.INPUT, "abc"), "abc"),
    (Fingerprint(Proof.BOOT_ID), "boot-id-0001"),
    (Fingerprint(Proof.SYSTEM_UUID), "system-uuid-0001"),
    (Fingerprint(Proof.MACHINE_ID), "machine-id-0001"),
    (Fingerprint(Proof.SN, "fv.txt"), SERIAL),
    (Fingerprint(Proof.HOSTNAME), "docker-desktop"),
]


@pytest.mark.parametrize("fingerprint,expected", GOOD_CASES)
def test_activate_writes_certificate(tmp_path, fingerprint, expected):
    config = make_config(tmp_path, [fingerprint])
    post = FakePost()
    active = Activate(config, FakeAmi({"knn": NODE_INFO}), post)
    active.start()
    assert active.wait_and_close(timeout=5) is True
    assert open(config.node_cert).read() == "cert info"
    assert open(config.node_ca).read() == "ca info"
    assert open(config.node_key).read() == "key info"
    url, body, headers = post.requests[0]
    assert url == "http://activate.example.com/v1/active"
    assert headers == {"Content-Type": "application/json"}
    assert body["fingerprintValue"] == expected
    assert body["batchName"] == "batch.test"
    assert body["securityValue"] == "token"
    assert body["penetrateData"] == {"abc": "abc"}


@pytest.mark.parametrize("fingerprint,expected", GOOD_CASES)
def test_collect_values(tmp_path, fingerprint, expected):
    config = make_config(tmp_path, [fingerprint])
    active = Activate(config, FakeAmi({"knn": NODE_INFO}), FakePost())
    assert active.collect() == expected


@pytest.mark.parametrize(
    "fingerprint",
    [
        Fingerprint(Proof.BOOT_ID),
        Fingerprint(Proof.SYSTEM_UUID),
        Fingerprint(Proof.MACHINE_ID),
        Fingerprint(Proof.SN, "fv.txt"),
        Fingerprint("Error"),
        Fingerprint(Proof.HOSTNAME),
    ],
)
def test_collect_without_node_info(tmp_path, fingerprint):
    config = make_config(tmp_path, [fingerprint])
    active = Activate(config, FakeAmi({"knn": None}), FakePost())
    with pytest.raises(MasterNodeInfoError):
        active.collect()


def test_collect_missing_node(tmp_path):
    config = make_config(tmp_path, [Fingerprint(Proof.HOSTNAME)])
    active = Activate(config, FakeAmi({"other": NODE_INFO}), FakePost())
    with pytest.raises(MasterNodeInfoError):
        active.collect()


def test_collect_unsupported_proof(tmp_path):
    config = make_config(tmp_path, [Fingerprint("Error")])
    active = Activate(config, FakeAmi({"knn": NODE_INFO}), FakePost())
    with pytest.raises(ProofTypeNotSupportedError):
        active.collect()


def test_collect_missing_sn_file(tmp_path):
    config = make_config(tmp_path, [Fingerprint(Proof.SN, "missing.txt")])
    active = Activate(config, FakeAmi({"knn": NODE_INFO}), FakePost())
    with pytest.raises(FileNotFoundError):
        active.collect()


def test_collect_ami_error(tmp_path):
    config = make_config(tmp_path, [Fingerprint(Proof.BOOT_ID)])
    active = Activate(config, FakeAmi(error=RuntimeError("ami error")), FakePost())
    with pytest.raises(RuntimeError, match="ami error"):
        active.collect()


def test_collect_without_fingerprints(tmp_path):
    ami = FakeAmi({"knn": NODE_INFO})
    active = Activate(make_config(tmp_path, []), ami, FakePost())
    assert active.collect() == ""
    assert ami.calls == 0


def test_error_response_writes_nothing(tmp_path):
    config = make_config(tmp_path, [Fingerprint(Proof.HOSTNAME)])
    post = FakePost(error=RuntimeError("ErrParam: error msg"))
    active = Activate(config, FakeAmi({"knn": {"hostname": "docker-desktop"}}), post)
    assert active.activate() is False
    assert not (tmp_path / "certs").exists()
    assert post.requests[0][1]["fingerprintValue"] == "docker-desktop"


def test_empty_fingerprint_value_sends_nothing(tmp_path):
    config = make_config(tmp_path, [Fingerprint(Proof.INPUT, "unknown")])
    post = FakePost()
    active = Activate(config, FakeAmi({"knn": NODE_INFO}), post)
    assert active.activate() is False
    assert post.requests == []


def test_wait_times_out_without_activation(tmp_path):
    config = make_config(tmp_path, [Fingerprint(Proof.HOSTNAME)])
    post = FakePost(error=RuntimeError("down"))
    active = Activate(config, FakeAmi({"knn": NODE_INFO}), post)
    active.start()
    assert active.wait_and_close(timeout=0.2) is False
    assert len(post.requests) >= 1