import json
import urllib.request

import pytest

from edgenode.activate import Activate, MasterNodeInfoError, ProofTypeNotSupportedError
from edgenode.config import Attribute, Config, Fingerprint, Proof

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
    "address": "192.0.2.77",
    "arch": "amd64",
    "machineID": "machine-id-example",
    "bootID": "boot-id-example",
    "systemUUID": "system-uuid-example",
}

SN_VALUE = "sn-example-0001"

ACTIVE_TEMPLATE = (
    "<form>{% for a in Attributes %}"
    '<label>{{ a.label }}</label><input name="{{ a.name }}" placeholder="{{ a.desc }}"/>'
    "{% endfor %}</form>"
)


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


class FakeTransport:
    def __init__(self, status=200, body=None):
        self.status = status
        self.body = json.dumps(RESPONSE).encode() if body is None else body
        self.requests = []

    def __call__(self, url, data, headers):
        self.requests.append((url, json.loads(data), dict(headers)))
        return self.status, self.body


def make_config(tmp_path, fingerprints=(), attributes=()):
    cfg = Config()
    cfg.init.active.interval = 5.0
    cfg.init.active.address = "https://cloud.example.com"
    cfg.init.batch.name = "batch.test"
    cfg.init.batch.namespace = "default"
    cfg.init.batch.security_type = "Token"
    cfg.init.batch.security_key = "token"
    cfg.init.active.collector.fingerprints = list(fingerprints)
    cfg.init.active.collector.attributes = list(attributes)
    certs = tmp_path / "node" / "certs"
    cfg.node.ca = str(certs / "ca.pem")
    cfg.node.cert = str(certs / "client.pem")
    cfg.node.key = str(certs / "client.key")
    return cfg


@pytest.fixture
def sn_dir(tmp_path):
    directory = tmp_path / "sn"
    directory.mkdir()
    (directory / "fv.txt").write_text(SN_VALUE + "\n")
    return str(directory)


@pytest.mark.parametrize(
    "proof",
    [Proof.BOOT_ID, Proof.SYSTEM_UUID, Proof.MACHINE_ID, Proof.HOST_NAME, "Error"],
)
def test_collect_without_node_info(tmp_path, proof):
    cfg = make_config(tmp_path, [Fingerprint(proof=proof)])
    active = Activate(cfg, FakeAmi({"knn": None}), transport=FakeTransport(), node_name="knn")
    with pytest.raises(MasterNodeInfoError):
        active.collect()


def test_collect_sn_error(tmp_path):
    cfg = make_config(tmp_path, [Fingerprint(proof=Proof.SN, value="fv.txt")])
    active = Activate(
        cfg, FakeAmi({"knn": NODE_INFO}), transport=FakeTransport(),
        node_name="knn", sn_dir=str(tmp_path / "missing"),
    )
    with pytest.raises(OSError):
        active.collect()


def test_collect_missing_node_name(tmp_path):
    cfg = make_config(tmp_path, [Fingerprint(proof=Proof.HOST_NAME)])
    active = Activate(cfg, FakeAmi({"other": NODE_INFO}), transport=FakeTransport(), node_name="knn")
    with pytest.raises(MasterNodeInfoError):
        active.collect()


def test_collect_ami_error(tmp_path):
    cfg = make_config(tmp_path, [Fingerprint(proof=Proof.BOOT_ID)])
    active = Activate(
        cfg, FakeAmi(error=RuntimeError("ami error")), transport=FakeTransport(), node_name="knn"
    )
    with pytest.raises(RuntimeError, match="ami error"):
        active.collect()


def test_collect_unsupported_proof(tmp_path):
    cfg = make_config(tmp_path, [Fingerprint(proof="Error")])
    active = Activate(cfg, FakeAmi({"knn": NODE_INFO}), transport=FakeTransport(), node_name="knn")
    with pytest.raises(ProofTypeNotSupportedError):
        active.collect()


def test_collect_without_fingerprints(tmp_path):
    ami = FakeAmi({"knn": NODE_INFO})
    active = Activate(make_config(tmp_path), ami, transport=FakeTransport(), node_name="knn")
    assert active.collect() == ""
    assert ami.calls == 0


GOOD_CASES = [
    (Fingerprint(proof=Proof.INPUT, value="abc"), "abc"),
    (Fingerprint(proof=Proof.BOOT_ID), NODE_INFO["bootID"]),
    (Fingerprint(proof=Proof.SYSTEM_UUID), NODE_INFO["systemUUID"]),
    (Fingerprint(proof=Proof.MACHINE_ID), NODE_INFO["machineID"]),
    (Fingerprint(proof=Proof.SN, value="fv.txt"), SN_VALUE),
    (Fingerprint(proof=Proof.HOST_NAME), NODE_INFO["hostname"]),
]


def assert_certificate_written(cfg):
    cert = RESPONSE["certificate"]
    with open(cfg.node.cert) as f:
        assert f.read() == cert["cert"]
    with open(cfg.node.ca) as f:
        assert f.read() == cert["ca"]
    with open(cfg.node.key) as f:
        assert f.read() == cert["key"]


@pytest.mark.parametrize("fingerprint,expected", GOOD_CASES)
def test_activate_good_cases(tmp_path, sn_dir, fingerprint, expected):
    cfg = make_config(tmp_path, [fingerprint], [Attribute(name="abc", value="abc")])
    transport = FakeTransport()
    active = Activate(
        cfg, FakeAmi({"knn": NODE_INFO}), transport=transport, node_name="knn", sn_dir=sn_dir
    )
    assert active.collect() == expected
    active.start()
    active.wait_and_close()
    assert active.activated
    assert_certificate_written(cfg)
    url, payload, headers = transport.requests[0]
    assert url == "https://cloud.example.com/v1/active"
    assert headers == {"Content-Type": "application/json"}
    assert payload == {
        "batchName": "batch.test",
        "namespace": "default",
        "fingerprintValue": expected,
        "securityType": "Token",
        "securityValue": "token",
        "penetrateData": {"abc": "abc"},
    }


def test_activate_error_response(tmp_path):
    cfg = make_config(tmp_path, [Fingerprint(proof=Proof.HOST_NAME)])
    body = json.dumps({"code": "ErrParam", "msg": "error msg"}).encode()
    active = Activate(
        cfg, FakeAmi({"knn": NODE_INFO}), transport=FakeTransport(500, body), node_name="knn"
    )
    assert active.activate() is False
    assert not active.activated
    assert not (tmp_path / "node" / "certs" / "client.pem").exists()


def test_activate_invalid_response_body(tmp_path):
    cfg = make_config(tmp_path, [Fingerprint(proof=Proof.HOST_NAME)])
    active = Activate(
        cfg, FakeAmi({"knn": NODE_INFO}), transport=FakeTransport(200, b"not json"), node_name="knn"
    )
    assert active.activate() is False


def test_activate_without_fingerprint_sends_nothing(tmp_path):
    transport = FakeTransport()
    active = Activate(make_config(tmp_path), FakeAmi({"knn": NODE_INFO}), transport=transport, node_name="knn")
    assert active.activate() is False
    assert transport.requests == []


def test_gen_cert_writes_files(tmp_path):
    cfg = make_config(tmp_path)
    active = Activate(cfg, FakeAmi(), transport=FakeTransport())
    active.gen_cert(RESPONSE["certificate"])
    assert_certificate_written(cfg)


def test_constructor_needs_ca_without_transport(tmp_path):
    cfg = make_config(tmp_path)
    cfg.init.active.ca = str(tmp_path / "missing-ca.pem")
    with pytest.raises(OSError):
        Activate(cfg, FakeAmi())


def test_start_rejects_non_positive_interval(tmp_path):
    cfg = make_config(tmp_path)
    cfg.init.active.interval = 0
    active = Activate(cfg, FakeAmi(), transport=FakeTransport())
    with pytest.raises(ValueError):
        active.start()


@pytest.fixture
def pages(tmp_path):
    directory = tmp_path / "pages"
    directory.mkdir()
    (directory / "active.html.template").write_text(ACTIVE_TEMPLATE)
    (directory / "success.html.template").write_text("<h3>activated</h3>")
    (directory / "failed.html.template").write_text("<h3>activation failed</h3>")
    return str(directory)


SERVER_ATTRS = {"batch": "b1", "namespace": "default", "fingerprintValue": "123"}


def server_activate(tmp_path, pages, transport):
    cfg = make_config(
        tmp_path,
        [Fingerprint(proof=Proof.INPUT, value="fingerprintValue")],
        [
            Attribute(name="batch", label="Batch"),
            Attribute(name="namespace", label="Namespace"),
            Attribute(name="fingerprintValue", label="Fingerprint", value="fallback"),
        ],
    )
    cfg.init.active.collector.server_pages = pages
    return Activate(cfg, FakeAmi({"knn": NODE_INFO}), transport=transport, node_name="knn")


def test_handle_view_renders_attributes(tmp_path, pages):
    active = server_activate(tmp_path, pages, FakeTransport())
    status, body = active.handle_view()
    assert status == 200
    assert 'name="batch"' in body
    assert "<label>Fingerprint</label>" in body


def test_handle_view_missing_template(tmp_path):
    active = server_activate(tmp_path, str(tmp_path / "nowhere"), FakeTransport())
    status, _ = active.handle_view()
    assert status == 500


def test_handle_update_success(tmp_path, pages):
    transport = FakeTransport()
    active = server_activate(tmp_path, pages, transport)
    status, body = active.handle_update("POST", dict(SERVER_ATTRS))
    assert active.attrs == SERVER_ATTRS
    assert status == 200
    assert "activated" in body
    assert transport.requests[0][1]["fingerprintValue"] == "123"


def test_handle_update_uses_defaults_and_reports_failure(tmp_path, pages):
    active = server_activate(tmp_path, pages, FakeTransport(500, b"{}"))
    status, body = active.handle_update("POST", {"batch": "b1"})
    assert active.attrs == {"batch": "b1", "namespace": "", "fingerprintValue": "fallback"}
    assert status == 200
    assert "activation failed" in body


def test_handle_update_post_only(tmp_path, pages):
    active = server_activate(tmp_path, pages, FakeTransport())
    assert active.handle_update("GET", None) == (405, "post only")


def test_handle_update_without_form(tmp_path, pages):
    active = server_activate(tmp_path, pages, FakeTransport())
    status, body = active.handle_update("POST", None)
    assert active.attrs["fingerprintValue"] == "fallback"
    assert status == 200
    assert "activated" in body


def test_server_serves_pages(tmp_path, pages):
    active = server_activate(tmp_path, pages, FakeTransport())
    active.cfg.init.active.collector.server_listen = "127.0.0.1:0"
    active.start()
    try:
        host, port = active.server_address
        with urllib.request.urlopen(f"http://{host}:{port}/", timeout=5) as resp:
            page = resp.read().decode()
        data = "batch=b1&namespace=default&fingerprintValue=123".encode()
        with urllib.request.urlopen(f"http://{host}:{port}/update", data=data, timeout=5) as resp:
            result = resp.read().decode()
    finally:
        active.close()
    assert 'name="namespace"' in page
    assert "activated" in result
    assert active.attrs == SERVER_ATTRS
    assert active.server_address is None


def test_server_with_invalid_listen_does_not_start(tmp_path, pages):
    active = server_activate(tmp_path, pages, FakeTransport())
    active.cfg.init.active.collector.server_listen = "www.example.com"
    active.start()
    assert active.server_address is None
    active.close()
    assert not active.activated