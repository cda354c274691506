"""Applications, their resources, messages and node shadows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

KIND_APPLICATION = "application"
KIND_CONFIGURATION = "configuration"
KIND_SECRET = "secret"

BAETYL_CORE = "baetyl-core"
BAETYL_INIT = "baetyl-init"

STATUS_UNKNOWN = "Unknown"

MESSAGE_CMD = "cmd"
MESSAGE_DATA = "data"
MESSAGE_NODE_PROPS = "nodeProps"

COMMAND_CONNECT = "connect"
COMMAND_LOGS = "logs"
COMMAND_DISCONNECT = "disconnect"
COMMAND_NODE_LABEL = "nodeLabel"
COMMAND_MULTI_NODE_LABELS = "multiNodeLabels"

CONFIG_OBJECT_PREFIX = "_object_"

KEY_APPS = "apps"
KEY_SYS_APPS = "sysapps"
KEY_APP_STATS = "appstats"
KEY_SYS_APP_STATS = "sysappstats"


def is_config_object(key: str) -> bool:
    """Tell whether a configuration data key refers to a downloadable object."""
    return key.startswith(CONFIG_OBJECT_PREFIX)


@dataclass(frozen=True)
class AppInfo:
    """Name and version of a deployed application."""

    name: str
    version: str = ""


@dataclass
class InstanceStats:
    """State of one service instance of an application."""

    service_name: str = ""
    status: str = ""
    cause: str = ""


@dataclass
class AppStats:
    """State of an application and of its service instances."""

    name: str = ""
    version: str = ""
    status: str = ""
    cause: str = ""
    instance_stats: dict[str, InstanceStats] = field(default_factory=dict)

    @property
    def info(self) -> AppInfo:
        return AppInfo(self.name, self.version)


@dataclass
class ContainerPort:
    host_port: int = 0
    container_port: int = 0
    protocol: str = ""


@dataclass
class VolumeMount:
    name: str
    mount_path: str
    read_only: bool = False


@dataclass
class Service:
    name: str
    ports: list[ContainerPort] = field(default_factory=list)
    replica: int = 0
    volume_mounts: list[VolumeMount] = field(default_factory=list)


@dataclass
class ObjectReference:
    name: str
    version: str = ""


@dataclass
class Volume:
    """A volume backed by a configuration or by a secret."""

    name: str
    config: ObjectReference | None = None
    secret: ObjectReference | None = None


@dataclass
class Application:
    name: str
    version: str = ""
    namespace: str = ""
    system: bool = False
    labels: dict[str, str] = field(default_factory=dict)
    services: list[Service] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)


@dataclass
class Configuration:
    name: str
    version: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class Secret:
    name: str
    version: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    data: dict[str, bytes] = field(default_factory=dict)
    system: bool = False


@dataclass
class Message:
    """A message exchanged over the internal pub/sub bus."""

    kind: str
    metadata: dict[str, str] = field(default_factory=dict)
    content: Any = None


def _to_app_info(item: Any) -> AppInfo:
    if isinstance(item, AppInfo):
        return item
    if isinstance(item, Mapping):
        return AppInfo(str(item.get("name", "")), str(item.get("version", "")))
    raise TypeError(f"cannot read application info from {type(item).__name__}")


def _to_instance_stats(name: str, item: Any) -> InstanceStats:
    if isinstance(item, InstanceStats):
        return item
    if isinstance(item, Mapping):
        return InstanceStats(
            service_name=str(item.get("serviceName", name)),
            status=str(item.get("status", "")),
            cause=str(item.get("cause", "")),
        )
    raise TypeError(f"cannot read instance stats from {type(item).__name__}")


def _to_app_stats(item: Any) -> AppStats:
    if isinstance(item, AppStats):
        return item
    if isinstance(item, Mapping):
        instances = item.get("instances") or {}
        return AppStats(
            name=str(item.get("name", "")),
            version=str(item.get("version", "")),
            status=str(item.get("status", "")),
            cause=str(item.get("cause", "")),
            instance_stats={k: _to_instance_stats(k, v) for k, v in instances.items()},
        )
    raise TypeError(f"cannot read application stats from {type(item).__name__}")


class Shadow(dict):
    """A free-form node shadow document with typed access to application lists."""

    def app_infos(self, is_sys: bool) -> list[AppInfo] | None:
        raw = self.get(KEY_SYS_APPS if is_sys else KEY_APPS)
        if raw is None:
            return None
        return [_to_app_info(item) for item in raw]

    def set_app_infos(self, is_sys: bool, apps: Iterable[AppInfo] | None) -> None:
        self[KEY_SYS_APPS if is_sys else KEY_APPS] = None if apps is None else list(apps)

    def app_stats(self, is_sys: bool) -> list[AppStats] | None:
        raw = self.get(KEY_SYS_APP_STATS if is_sys else KEY_APP_STATS)
        if raw is None:
            return None
        return [_to_app_stats(item) for item in raw]

    def set_app_stats(self, is_sys: bool, stats: Iterable[AppStats] | None) -> None:
        key = KEY_SYS_APP_STATS if is_sys else KEY_APP_STATS
        self[key] = None if stats is None else list(stats)


class Report(Shadow):
    """What the node reports about itself."""


class Desire(Shadow):
    """What the cloud wants the node to run."""