"""Node configuration and its loading from a plain mapping."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class Proof(str, Enum):
    """Where the activation fingerprint of a node is taken from."""

    INPUT = "input"
    SN = "sn"
    HOST_NAME = "hostName"
    BOOT_ID = "bootID"
    SYSTEM_UUID = "systemUUID"
    MACHINE_ID = "machineID"


@dataclass
class Fingerprint:
    proof: Proof | str
    value: str = ""


@dataclass
class Attribute:
    name: str
    label: str = ""
    value: str = ""
    desc: str = ""


@dataclass
class CollectorConfig:
    fingerprints: list[Fingerprint] = field(default_factory=list)
    attributes: list[Attribute] = field(default_factory=list)
    server_listen: str = ""
    server_pages: str = "etc/baetyl/pages"


@dataclass
class ActiveConfig:
    address: str = ""
    url: str = "/v1/active"
    interval: float = 45.0
    timeout: float = 30.0
    ca: str = ""
    cert: str = ""
    key: str = ""
    insecure_skip_verify: bool = False
    collector: CollectorConfig = field(default_factory=CollectorConfig)


@dataclass
class BatchConfig:
    name: str = ""
    namespace: str = ""
    security_type: str = ""
    security_key: str = ""


@dataclass
class InitConfig:
    batch: BatchConfig = field(default_factory=BatchConfig)
    active: ActiveConfig = field(default_factory=ActiveConfig)


@dataclass
class NodeCertConfig:
    ca: str = "var/lib/baetyl/node/ca.pem"
    cert: str = "var/lib/baetyl/node/client.pem"
    key: str = "var/lib/baetyl/node/client.key"


@dataclass
class EventConfig:
    publish_topic: str = "$baetyl/node/props"
    publish_qos: int = 0


@dataclass
class Config:
    init: InitConfig = field(default_factory=InitConfig)
    node: NodeCertConfig = field(default_factory=NodeCertConfig)
    event: EventConfig = field(default_factory=EventConfig)
    report_interval: float = 20.0
    download_path: str = "var/lib/baetyl/object"
    pubsub_plugin: str = "defaultpubsub"


_DURATION_PART = re.compile(r"([0-9]+(?:\.[0-9]*)?|\.[0-9]+)(ns|us|µs|μs|ms|s|m|h)")
_UNIT_SECONDS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6,
                 "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def _parse_duration(value: Any) -> float:
    """Read a duration such as "1m30s"; plain numbers are seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")
    text = value.strip()
    sign = -1.0 if text[:1] == "-" else 1.0
    text = text.lstrip("+-") if text[:1] in "+-" else text
    if text == "0":
        return 0.0
    parts = _DURATION_PART.findall(text)
    if not text or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration: {value!r}")
    return sign * sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)


def _section(data: Mapping, key: str) -> Mapping:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"section {key!r} must be a mapping")
    return value


def _items(data: Mapping, key: str) -> list:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ValueError(f"{key!r} must be a list")
    return value


def _fingerprint(item: Any) -> Fingerprint:
    if not isinstance(item, Mapping):
        raise ValueError("a fingerprint must be a mapping")
    proof = item.get("proof", "")
    try:
        proof = Proof(proof)
    except ValueError:
        proof = str(proof)
    return Fingerprint(proof=proof, value=str(item.get("value", "")))


def _attribute(item: Any) -> Attribute:
    if not isinstance(item, Mapping) or "name" not in item:
        raise ValueError("an attribute must be a mapping with a name")
    return Attribute(**{k: str(item.get(k, "")) for k in ("name", "label", "value", "desc")})


def load_config(data: Mapping | None) -> Config:
    """Build a Config from a parsed configuration document."""
    data = data or {}
    if not isinstance(data, Mapping):
        raise ValueError("configuration must be a mapping")
    cfg = Config()

    init = _section(data, "init")
    batch = _section(init, "batch")
    cfg.init.batch = BatchConfig(
        name=str(batch.get("name", "")),
        namespace=str(batch.get("namespace", "")),
        security_type=str(batch.get("securityType", "")),
        security_key=str(batch.get("securityKey", "")),
    )

    active = _section(init, "active")
    collector = _section(active, "collector")
    server = _section(collector, "server")
    cfg.init.active = ActiveConfig(
        address=str(active.get("address", ActiveConfig.address)),
        url=str(active.get("url", ActiveConfig.url)),
        interval=_parse_duration(active.get("interval", ActiveConfig.interval)),
        timeout=_parse_duration(active.get("timeout", ActiveConfig.timeout)),
        ca=str(active.get("ca", "")),
        cert=str(active.get("cert", "")),
        key=str(active.get("key", "")),
        insecure_skip_verify=bool(active.get("insecureSkipVerify", False)),
        collector=CollectorConfig(
            fingerprints=[_fingerprint(f) for f in _items(collector, "fingerprints")],
            attributes=[_attribute(a) for a in _items(collector, "attributes")],
            server_listen=str(server.get("listen", "")),
            server_pages=str(server.get("pages", CollectorConfig.server_pages)),
        ),
    )

    node = _section(data, "node")
    cfg.node = NodeCertConfig(
        ca=str(node.get("ca", NodeCertConfig.ca)),
        cert=str(node.get("cert", NodeCertConfig.cert)),
        key=str(node.get("key", NodeCertConfig.key)),
    )

    publish = _section(_section(data, "event"), "publish")
    qos = publish.get("qos", EventConfig.publish_qos)
    if isinstance(qos, bool) or qos not in (0, 1):
        raise ValueError(f"invalid publish qos: {qos!r}")
    cfg.event = EventConfig(
        publish_topic=str(publish.get("topic", EventConfig.publish_topic)),
        publish_qos=qos,
    )

    report = _section(_section(data, "engine"), "report")
    cfg.report_interval = _parse_duration(report.get("interval", Config.report_interval))
    download = _section(_section(data, "sync"), "download")
    cfg.download_path = str(download.get("path", Config.download_path))
    cfg.pubsub_plugin = str(_section(data, "plugin").get("pubsub", Config.pubsub_plugin))
    return cfg