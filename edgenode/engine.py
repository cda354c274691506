"""The engine: reports node and application state and applies desired applications."""

from __future__ import annotations

import copy
import hashlib
import logging
import os
import queue
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, MutableMapping

from .apps import (
    align_apps,
    check_port,
    check_service,
    filter_app_like,
    filter_app_not_like,
    get_delete_and_update,
    is_object_config,
    make_key,
    valid_param,
)
from .config import Config
from .downside import ENV_SERVICE_NAME, TOPIC_DOWNSIDE, DownsideHandler
from .models import (
    BAETYL_CORE,
    BAETYL_INIT,
    KIND_APPLICATION,
    KIND_CONFIGURATION,
    KIND_SECRET,
    Application,
    AppInfo,
    AppStats,
    Configuration,
    Desire,
    ObjectReference,
    Report,
    Secret,
    Volume,
    VolumeMount,
)

SYSTEM_CERT_VOLUME_PREFIX = "baetyl-cert-volume-"
SYSTEM_CERT_SECRET_PREFIX = "baetyl-cert-secret-"

SYSTEM_CERT_PATH = "var/lib/baetyl/system/certs"
SYSTEM_CERT_CA = "ca.pem"
SYSTEM_CERT_CRT = "crt.pem"
SYSTEM_CERT_KEY = "key.pem"

ENV_APP_NAME = "BAETYL_APP_NAME"
ENV_EDGE_NAMESPACE = "BAETYL_EDGE_NAMESPACE"
ENV_EDGE_SYSTEM_NAMESPACE = "BAETYL_EDGE_SYSTEM_NAMESPACE"
ENV_HOST_PATH_LIB = "BAETYL_HOST_PATH_LIB"

DEFAULT_EDGE_NAMESPACE = "baetyl-edge"
DEFAULT_EDGE_SYSTEM_NAMESPACE = "baetyl-edge-system"
DEFAULT_HOST_PATH_LIB = "/var/lib/baetyl"

_CERT_IPS = ("0.0.0.0", "127.0.0.1")
_POLL = 0.05

_log = logging.getLogger(__name__)


def _edge_namespace() -> str:
    return os.environ.get(ENV_EDGE_NAMESPACE) or DEFAULT_EDGE_NAMESPACE


def _edge_system_namespace() -> str:
    return os.environ.get(ENV_EDGE_SYSTEM_NAMESPACE) or DEFAULT_EDGE_SYSTEM_NAMESPACE


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _issue(security: Any, common_name: str, service_name: str, namespace: str) -> tuple[bytes, bytes]:
    return security.issue_certificate(
        common_name,
        ips=list(_CERT_IPS),
        dns_names=[f"{service_name}.{namespace}", service_name, "localhost"],
    )


def _unavailable_chain(metadata: Mapping[str, str]) -> Any:
    """Chain factory used when no remote debugging backend is configured."""
    target = "/".join(
        part
        for part in (
            metadata.get("namespace", ""),
            metadata.get("name", ""),
            metadata.get("container", ""),
        )
        if part
    )
    raise RuntimeError(f"remote debugging is not available for {target or 'unknown target'}")


def gen_system_cert(security: Any, cert_dir: str | os.PathLike, app_name: str, service_name: str) -> None:
    """Issue the certificate of this service and write CA, certificate and key to ``cert_dir``."""
    ca = security.get_ca()
    crt, key = _issue(security, f"{app_name}.{service_name}", service_name, _edge_system_namespace())
    base = Path(cert_dir)
    _write_file(base / SYSTEM_CERT_CA, ca)
    _write_file(base / SYSTEM_CERT_CRT, crt)
    _write_file(base / SYSTEM_CERT_KEY, key)


class Engine:
    """Reports node and application state and applies what the cloud desires.

    Collaborators:
    ``store`` is a mutable mapping from object keys to applications, configurations and secrets;
    ``node.get()`` returns an object with ``report`` and ``desire`` shadows, and
    ``node.report(report, override)`` returns the desire delta or None;
    ``sync`` provides ``sync_apps(infos)``, ``sync_resource(info)`` and
    ``prepare_app(host_path, object_path, app, configs)``;
    ``ami`` provides ``collect_node_info()``, ``collect_node_stats()``, ``stats_apps(ns)``,
    ``get_mode_info()``, ``fetch_log(ns, service, tail, since)``, ``delete_app(ns, name)``,
    ``apply_app(ns, app, configs, secrets)`` and ``update_node_labels(name, labels)``;
    ``security`` provides ``get_ca()`` and ``issue_certificate(common_name, ips=, dns_names=)``
    returning ``(crt, key)``; ``pubsub`` provides ``subscribe``, ``unsubscribe`` and ``publish``.
    """

    def __init__(
        self,
        cfg: Config,
        store: MutableMapping[str, Any],
        node: Any,
        sync: Any,
        ami: Any,
        *,
        security: Any = None,
        pubsub: Any = None,
        chain_factory: Callable[[Mapping[str, str]], Any] | None = None,
        service_name: str | None = None,
        host_path_lib: str | None = None,
        edge_namespace: str | None = None,
        system_namespace: str | None = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.node = node
        self.sync = sync
        self.ami = ami
        self.security = security
        self.pubsub = pubsub
        self.chain_factory = chain_factory or _unavailable_chain
        self.service_name = (
            os.environ.get(ENV_SERVICE_NAME, "") if service_name is None else service_name
        )
        lib = host_path_lib or os.environ.get(ENV_HOST_PATH_LIB) or DEFAULT_HOST_PATH_LIB
        self.host_host_path = os.path.join(lib, "host")
        self.object_host_path = os.path.join(lib, "object")
        self.edge_namespace = edge_namespace or _edge_namespace()
        self.system_namespace = system_namespace or _edge_system_namespace()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._downside_queue: queue.Queue | None = None
        self.downside_handler: DownsideHandler | None = None

    # lifecycle

    def start(self) -> None:
        """Start periodic reporting and the processing of downside messages."""
        self._stop.clear()
        self._spawn(self._reporting)
        if self.pubsub is None:
            return
        try:
            self._downside_queue = self.pubsub.subscribe(TOPIC_DOWNSIDE)
        except Exception:
            _log.exception("failed to subscribe downside topic %s", TOPIC_DOWNSIDE)
            return
        self.downside_handler = DownsideHandler(
            self.pubsub, self.ami, self.chain_factory, service_name=self.service_name
        )
        self._spawn(self._processing)

    def _spawn(self, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, daemon=True)
        self._threads.append(thread)
        thread.start()

    def close(self) -> None:
        """Stop the background work and unsubscribe from the downside topic."""
        _log.debug("engine close")
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        if self.pubsub is not None and self._downside_queue is not None:
            try:
                self.pubsub.unsubscribe(TOPIC_DOWNSIDE, self._downside_queue)
            except Exception:
                _log.warning("failed to unsubscribe topic downside")
            self._downside_queue = None

    def __enter__(self) -> "Engine":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _reporting(self) -> None:
        _log.info("engine starts to report")
        while not self._stop.wait(self.cfg.report_interval):
            try:
                self._report_and_desire(delete=True)
            except Exception:
                _log.exception("failed to report local shadow")
            else:
                _log.debug("engine reports local shadow")
        _log.info("engine has stopped reporting")

    def _processing(self) -> None:
        assert self._downside_queue is not None and self.downside_handler is not None
        while not self._stop.is_set():
            try:
                msg = self._downside_queue.get(timeout=_POLL)
            except queue.Empty:
                continue
            try:
                self.downside_handler.on_message(msg)
            except Exception:
                _log.exception("failed to handle downside message")

    # reporting

    def report_and_desire(self) -> None:
        """Report once and apply desired applications without deleting any."""
        self._report_and_desire(delete=False)

    def _report_and_desire(self, delete: bool) -> None:
        node = self.node.get()
        try:
            self._recycle_if_need(node)
        except Exception as exc:
            _log.error("failed to recycle: %s", exc)
        self._report_and_apply(True, delete, node.desire)
        self._report_and_apply(False, delete, node.desire)

    def _recycle_if_need(self, node: Any) -> None:
        report = node.report
        if "nodestats" not in report:
            raise LookupError("node stats not exist in report data")
        node_stats = report["nodestats"] or {}
        if "node" not in report:
            raise LookupError("node info not exist in report data")
        node_info = report["node"] or {}
        master = next(
            (name for name, info in node_info.items() if _field(info, "role") == "master"), ""
        )
        stats = node_stats.get(master)
        if stats is not None and _field(stats, "diskPressure", _field(stats, "disk_pressure", False)):
            self.recycle()

    def collect(self, ns: str, is_sys: bool, desire: Desire | None) -> Report:
        """Gather node info, node stats and application stats into a report."""

        def attempt(what: str, call: Callable[[], Any]) -> Any:
            try:
                return call()
            except Exception as exc:
                _log.warning("failed to %s: %s", what, exc)
                return None

        node_info = attempt("collect node info", self.ami.collect_node_info)
        node_stats = attempt("collect node stats", self.ami.collect_node_stats)
        app_stats = attempt("collect app stats", lambda: self.ami.stats_apps(ns)) or []
        mode_info = attempt("get mode info", self.ami.get_mode_info)

        stats = list(app_stats)
        apps = [AppInfo(s.name, s.version) for s in stats]
        if desire is not None:
            apps = align_apps(apps, desire.app_infos(is_sys))
        report = Report(
            time=datetime.now(timezone.utc),
            modeinfo=mode_info,
            node=node_info,
            nodestats=node_stats,
        )
        report.set_app_infos(is_sys, apps)
        report.set_app_stats(is_sys, stats)
        return report

    def _report_and_apply(self, is_sys: bool, delete: bool, desire: Desire | None) -> None:
        ns = self.system_namespace if is_sys else self.edge_namespace
        report = self.collect(ns, is_sys, desire)
        _log.debug("collected stats of node and apps: %r", report)

        rapps = report.app_infos(is_sys) or []
        delta = self.node.report(report, False)
        if delta is None:
            return
        dapps = Desire(delta).app_infos(is_sys)
        if dapps is None:
            return

        if self.service_name == BAETYL_CORE:
            dapps = filter_app_not_like(dapps, [BAETYL_CORE])
            rapps = filter_app_not_like(rapps, [BAETYL_CORE])
        elif self.service_name == BAETYL_INIT:
            dapps = filter_app_like(dapps, [BAETYL_CORE])
            rapps = filter_app_like(rapps, [BAETYL_CORE])

        to_delete, update = get_delete_and_update(dapps, rapps)
        _log.debug("delete %r, update %r", to_delete, update)

        stats = {s.name: s for s in report.app_stats(is_sys) or []}
        app_data = dict(self.sync.sync_apps(dapps))
        check_service(dapps, app_data, stats, update)
        check_port(dapps, app_data, stats, update)
        self._report_app_stats_if_need(is_sys, report, stats)
        if delete:
            for name in to_delete:
                self.ami.delete_app(ns, name)
        self._apply_apps(ns, update, stats)
        self._report_app_stats_if_need(is_sys, report, stats)
        _log.info("applied applications (system=%s): %r", is_sys, dapps)

    def _report_app_stats_if_need(self, is_sys: bool, report: Report, stats: Mapping[str, AppStats]) -> None:
        if not stats:
            return
        report.set_app_stats(is_sys, list(stats.values()))
        self.node.report(report, False)

    # applying

    def _apply_apps(self, ns: str, infos: Mapping[str, AppInfo], stats: MutableMapping[str, AppStats]) -> None:
        if not infos:
            return
        with ThreadPoolExecutor(max_workers=len(infos)) as pool:
            futures = {info.name: (info, pool.submit(self._apply_app, ns, info)) for info in infos.values()}
        for name, (info, future) in futures.items():
            exc = future.exception()
            if exc is None:
                continue
            _log.error("failed to apply application %r: %s", info, exc)
            stat = stats.get(name)
            if stat is None:
                stat = AppStats(name=name, version=info.version)
                stats[name] = stat
            stat.cause += str(exc)

    def _load(self, key: str | None, what: str, ref: Any) -> Any:
        if key is None:
            raise LookupError(f"failed to get {what} name: ({ref.name}) version: ({ref.version})")
        try:
            return copy.deepcopy(self.store[key])
        except KeyError:
            raise LookupError(
                f"failed to get {what} name: ({ref.name}) version: ({ref.version}) with error: not found"
            ) from None

    def _apply_app(self, ns: str, info: AppInfo) -> None:
        self.sync.sync_resource(info)
        app: Application = self._load(make_key(KIND_APPLICATION, info.name, info.version), "app", info)
        configs: dict[str, Configuration] = {}
        secrets: dict[str, Secret] = {}
        for volume in app.volumes:
            if volume.config is not None:
                ref = volume.config
                cfg = self._load(make_key(KIND_CONFIGURATION, ref.name, ref.version), "config", ref)
                configs[cfg.name] = cfg
            elif volume.secret is not None:
                ref = volume.secret
                sec = self._load(make_key(KIND_SECRET, ref.name, ref.version), "secret", ref)
                secrets[sec.name] = sec
        self.sync.prepare_app(self.host_host_path, self.object_host_path, app, configs)
        if self.security is not None and BAETYL_CORE not in app.name and BAETYL_INIT not in app.name:
            self._inject_cert(app, secrets)
        self.ami.apply_app(ns, app, configs, secrets)

    def _inject_cert(self, app: Application, secrets: dict[str, Secret]) -> None:
        ca = self.security.get_ca()
        ns = self.system_namespace if app.system else self.edge_namespace
        for svc in app.services:
            common_name = f"{app.name}.{svc.name}"
            suffix = hashlib.md5(common_name.encode()).hexdigest()
            crt, key = _issue(self.security, common_name, svc.name, ns)
            secret_name = SYSTEM_CERT_SECRET_PREFIX + suffix
            if secret_name in secrets:
                _log.warning("the secret %s will be overwritten for internal communication", secret_name)
            secrets[secret_name] = Secret(
                name=secret_name,
                namespace=app.namespace,
                labels={"baetyl-app-name": app.name, "security-type": "certificate"},
                data={SYSTEM_CERT_CRT: crt, SYSTEM_CERT_KEY: key, SYSTEM_CERT_CA: ca},
                system=app.namespace == self.system_namespace,
            )
            volume_name = SYSTEM_CERT_VOLUME_PREFIX + suffix
            svc.volume_mounts.append(
                VolumeMount(name=volume_name, mount_path=SYSTEM_CERT_PATH, read_only=True)
            )
            app.volumes.append(Volume(name=volume_name, secret=ObjectReference(name=secret_name)))

    # logs

    def get_service_log(self, service: str, system: Any = "", tail_lines: str = "", since_seconds: str = "") -> tuple[int, Any]:
        """Fetch a service log; returns an HTTP status and either the log stream or an error body."""
        try:
            tail, since = valid_param(tail_lines or "", since_seconds or "")
        except ValueError as exc:
            return 400, {"code": "RequestParamInvalid", "message": str(exc)}
        ns = self.system_namespace if system in (True, "true") else self.edge_namespace
        try:
            reader = self.ami.fetch_log(ns, service, tail, since)
        except Exception as exc:
            return 500, {"code": "UnknownError", "message": str(exc)}
        return 200, reader

    # storage

    def recycle(self) -> None:
        """Delete object configurations no reported or desired application uses."""
        _log.info("start recycling useless object storage space")
        node = self.node.get()
        infos = [
            *(node.report.app_infos(False) or []),
            *(node.report.app_infos(True) or []),
            *(node.desire.app_infos(False) or []),
            *(node.desire.app_infos(True) or []),
        ]
        used: set[str | None] = set()
        for info in infos:
            key = make_key(KIND_APPLICATION, info.name, info.version)
            if key is None or key not in self.store:
                raise LookupError(f"application {info.name} version {info.version} not found")
            app: Application = self.store[key]
            used.update(
                make_key(KIND_CONFIGURATION, v.config.name, v.config.version)
                for v in app.volumes
                if v.config is not None
            )

        unused: dict[str, Configuration] = {}
        for value in list(self.store.values()):
            if isinstance(value, Configuration) and is_object_config(value):
                key = make_key(KIND_CONFIGURATION, value.name, value.version)
                if key not in used and key is not None:
                    unused[key] = value

        for key, cfg in unused.items():
            try:
                del self.store[key]
            except KeyError as exc:
                _log.error("failed to delete configuration %s: %s", key, exc)
            directory = os.path.join(self.cfg.download_path, cfg.name)
            try:
                shutil.rmtree(directory)
            except FileNotFoundError:
                pass
            except OSError:
                _log.error("failed to clean dir %s", directory)
        _log.info("complete recycling useless object storage space")