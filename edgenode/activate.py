"""Node activation: fingerprint collection, the activation request and the input page."""

from __future__ import annotations

import json
import logging
import os
import random
import ssl
import threading
import urllib.error
import urllib.parse
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Mapping

import jinja2

from .config import Config, Proof

DEFAULT_SN_PATH = "var/lib/baetyl/sn"
ENV_KUBE_NODE_NAME = "KUBE_NODE_NAME"

PAGE_ACTIVE = "active.html.template"
PAGE_SUCCESS = "success.html.template"
PAGE_FAILED = "failed.html.template"

Transport = Callable[[str, bytes, Mapping[str, str]], "tuple[int, bytes]"]

_log = logging.getLogger(__name__)

_NODE_INFO_FIELDS = {
    Proof.HOST_NAME: ("hostname", "hostname"),
    Proof.MACHINE_ID: ("machineID", "machine_id"),
    Proof.SYSTEM_UUID: ("systemUUID", "system_uuid"),
    Proof.BOOT_ID: ("bootID", "boot_id"),
}


class ProofTypeNotSupportedError(ValueError):
    """The proof type of a fingerprint is not supported."""

    def __init__(self, proof: Any = None) -> None:
        super().__init__("the proof type is not supported" + (f": {proof}" if proof else ""))


class MasterNodeInfoError(LookupError):
    """The information of the master node could not be obtained."""

    def __init__(self) -> None:
        super().__init__("failed to get master node info")


def _field(obj: Any, key: str, attr: str | None = None) -> str:
    if isinstance(obj, Mapping):
        return str(obj.get(key) or "")
    return str(getattr(obj, attr or key, "") or "")


def _url_transport(cfg: Config) -> Transport:
    """Post requests over HTTPS, trusting the configured CA."""
    active = cfg.init.active
    context = ssl.create_default_context()
    try:
        context.load_verify_locations(cadata=Path(active.ca).read_text(errors="ignore"))
    except (ssl.SSLError, ValueError):
        _log.warning("no usable certificate found in %s", active.ca)
    if active.cert and active.key:
        context.load_cert_chain(active.cert, active.key)
    if active.insecure_skip_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    def post(url: str, data: bytes, headers: Mapping[str, str]) -> tuple[int, bytes]:
        request = urllib.request.Request(url, data=data, headers=dict(headers), method="POST")
        try:
            with urllib.request.urlopen(request, timeout=active.timeout, context=context) as resp:
                return resp.status, resp.read()
        except urllib.error.HTTPError as exc:
            return exc.code, exc.read()

    return post


class Activate:
    """Activates the node with the cloud and stores the issued certificate.

    ``ami.collect_node_info()`` returns a mapping from node names to node info;
    ``transport(url, data, headers)`` posts a request and returns status and body.
    """

    def __init__(
        self,
        cfg: Config,
        ami: Any,
        *,
        transport: Transport | None = None,
        node_name: str | None = None,
        sn_dir: str = DEFAULT_SN_PATH,
    ) -> None:
        self.cfg = cfg
        self.ami = ami
        self.transport: Transport = transport if transport is not None else _url_transport(cfg)
        self.node_name = os.environ.get(ENV_KUBE_NODE_NAME, "") if node_name is None else node_name
        self.sn_dir = sn_dir
        self.attrs: dict[str, str] = {a.name: a.value for a in cfg.init.active.collector.attributes}
        self._activated = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._server: ThreadingHTTPServer | None = None

    @property
    def activated(self) -> bool:
        return self._activated.is_set()

    @property
    def server_address(self) -> tuple[str, int] | None:
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def start(self) -> None:
        """Activate periodically, or serve the attribute input page if one is configured."""
        self._stop.clear()
        listen = self.cfg.init.active.collector.server_listen
        if not listen:
            if self.cfg.init.active.interval <= 0:
                raise ValueError("activation interval must be positive")
            target = self._activating
        else:
            host, _, port = listen.rpartition(":")
            try:
                if not port.isdigit():
                    raise ValueError(f"invalid listen address: {listen!r}")
                self._server = ThreadingHTTPServer((host, int(port)), self._make_handler())
            except (OSError, ValueError) as exc:
                _log.error("failed to start activation server: %s", exc)
                return
            target = self._server.serve_forever
        self._thread = threading.Thread(target=target, daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Stop the server or the activation loop."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def wait_and_close(self) -> None:
        """Block until activation succeeds, then close."""
        self._activated.wait()
        self.close()

    def __enter__(self) -> "Activate":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _activating(self) -> None:
        self.activate()
        while not self._stop.wait(self.cfg.init.active.interval + random.randrange(100) / 1000):
            self.activate()

    def activate(self) -> bool:
        """Send one activation request; return whether a certificate was stored."""
        batch = self.cfg.init.batch
        try:
            fingerprint = self.collect()
        except Exception as exc:
            _log.error("failed to get fingerprint value: %s", exc)
            return False
        if not fingerprint:
            _log.error("fingerprint value is null")
            return False
        data = json.dumps({
            "batchName": batch.name,
            "namespace": batch.namespace,
            "fingerprintValue": fingerprint,
            "securityType": batch.security_type,
            "securityValue": batch.security_key,
            "penetrateData": dict(self.attrs),
        }).encode()
        active = self.cfg.init.active
        try:
            status, body = self.transport(
                f"{active.address}{active.url}", data, {"Content-Type": "application/json"}
            )
        except Exception as exc:
            _log.error("failed to send activate data: %s", exc)
            return False
        if not 200 <= status < 300:
            _log.error("failed to send activate data: [%d] %r", status, body)
            return False
        try:
            response = json.loads(body)
            if not isinstance(response, Mapping):
                raise ValueError("activate response must be an object")
            self.gen_cert(response.get("certificate") or {})
        except (ValueError, OSError) as exc:
            _log.error("failed to store activate response: %s", exc)
            return False
        self._activated.set()
        return True

    def collect(self) -> str:
        """Return the fingerprint value of this node; empty if none is configured."""
        fingerprints = self.cfg.init.active.collector.fingerprints
        if not fingerprints:
            return ""
        info = (self.ami.collect_node_info() or {}).get(self.node_name)
        if info is None:
            raise MasterNodeInfoError()
        for fp in fingerprints:
            try:
                proof = Proof(fp.proof)
            except ValueError:
                raise ProofTypeNotSupportedError(fp.proof) from None
            if proof is Proof.INPUT:
                if self.attrs is not None:
                    return self.attrs.get(fp.value, "")
                continue
            if proof is Proof.SN:
                return Path(self.sn_dir, fp.value).read_text().strip()
            return _field(info, *_NODE_INFO_FIELDS[proof])
        return ""

    def gen_cert(self, certificate: Any) -> None:
        """Write the CA, certificate and key of the node to their configured paths."""
        node = self.cfg.node
        for path, name in ((node.ca, "ca"), (node.cert, "cert"), (node.key, "key")):
            target = Path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(_field(certificate, name))

    def _render(self, page: str, context: Mapping[str, Any]) -> tuple[int, str]:
        pages = self.cfg.init.active.collector.server_pages
        env = jinja2.Environment(loader=jinja2.FileSystemLoader(pages), autoescape=True)
        try:
            return 200, env.get_template(page).render(**context)
        except jinja2.TemplateError as exc:
            return 500, str(exc) or f"template {page} not found"

    def handle_view(self) -> tuple[int, str]:
        """Render the attribute input page; returns HTTP status and body."""
        return self._render(PAGE_ACTIVE, {"Attributes": self.cfg.init.active.collector.attributes})

    def handle_update(self, method: str, form: Mapping[str, Any] | None) -> tuple[int, str]:
        """Take submitted attributes, activate, and render the result page."""
        if method.upper() != "POST":
            return 405, "post only"
        form = form or {}
        attributes: dict[str, str] = {}
        for attr in self.cfg.init.active.collector.attributes:
            value = form.get(attr.name, "")
            if isinstance(value, (list, tuple)):
                value = value[0] if value else ""
            attributes[attr.name] = str(value) if value else attr.value
        _log.info("activation attributes from server: %r", attributes)
        self.attrs = attributes
        self.activate()
        page = PAGE_SUCCESS if Path(self.cfg.node.cert).is_file() else PAGE_FAILED
        return self._render(page, {})

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        activate = self

        class _Handler(BaseHTTPRequestHandler):
            def _dispatch(self) -> None:
                url = urllib.parse.urlsplit(self.path)
                if url.path != "/update":
                    status, body = activate.handle_view()
                else:
                    length = int(self.headers.get("Content-Length") or 0)
                    raw = self.rfile.read(length).decode("utf-8", errors="replace")
                    form = urllib.parse.parse_qs(url.query)
                    form.update(urllib.parse.parse_qs(raw))
                    status, body = activate.handle_update(self.command, form)
                data = body.encode("utf-8")
                self.send_response(status)
                kind = "html" if status == 200 else "plain"
                self.send_header("Content-Type", f"text/{kind}; charset=utf-8")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            do_GET = _dispatch
            do_POST = _dispatch

            def log_message(self, fmt: str, *args: Any) -> None:
                _log.debug(fmt, *args)

        return _Handler