"""Data model shared by the engine: applications, configurations and shadows."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

UNKNOWN = "Unknown"
CONFIG_OBJECT_PREFIX = "_object_"
BAETYL_CORE = "baetyl-core"
BAETYL_INIT = "baetyl-init"

_APPS_KEY = {True: "sysapps", False: "apps"}
_STATS_KEY = {True: "sysappstats", False: "appstats"}


class Kind(str, Enum):
    """Kinds of objects kept in the store."""

    APPLICATION = "application"
    CONFIGURATION = "configuration"
    SECRET = "secret"
    NODE = "node"


@dataclass
class AppInfo:
    """Name and version of an application."""

    name: str = ""
    version: str = ""

    @classmethod
    def from_value(cls, value: AppInfo | Mapping[str, Any]) -> AppInfo:
        if isinstance(value, AppInfo):
            return cls(value.name, value.version)
        return cls(name=value.get("name", ""), version=value.get("version", ""))


@dataclass
class InstanceStats:
    """Status of one service instance."""

    service_name: str = ""
    status: str = ""
    cause: str = ""

    @classmethod
    def from_value(cls, value: InstanceStats | Mapping[str, Any]) -> InstanceStats:
        if isinstance(value, InstanceStats):
            return cls(value.service_name, value.status, value.cause)
        return cls(
            service_name=value.get("serviceName", ""),
            status=value.get("status", ""),
            cause=value.get("cause", ""),
        )


@dataclass
class AppStats:
    """Status of an application and its instances."""

    name: str = ""
    version: str = ""
    status: str = ""
    cause: str = ""
    instance_stats: dict[str, InstanceStats] = field(default_factory=dict)

    @property
    def app_info(self) -> AppInfo:
        return AppInfo(self.name, self.version)

    @classmethod
    def from_value(cls, value: AppStats | Mapping[str, Any]) -> AppStats:
        if isinstance(value, AppStats):
            instances: Mapping[str, Any] = value.instance_stats
            base = cls(value.name, value.version, value.status, value.cause)
        else:
            instances = value.get("instances") or {}
            base = cls(
                name=value.get("name", ""),
                version=value.get("version", ""),
                status=value.get("status", ""),
                cause=value.get("cause", ""),
            )
        base.instance_stats = {
            key: InstanceStats.from_value(item) for key, item in instances.items()
        }
        return base


@dataclass
class ContainerPort:
    host_port: int = 0
    container_port: int = 0
    protocol: str = ""


@dataclass
class VolumeMount:
    name: str = ""
    mount_path: str = ""
    read_only: bool = False


@dataclass
class ObjectReference:
    name: str = ""
    version: str = ""


@dataclass
class Volume:
    """A volume backed by a configuration, a secret or nothing."""

    name: str = ""
    config: ObjectReference | None = None
    secret: ObjectReference | None = None


@dataclass
class Service:
    name: str = ""
    replica: int = 0
    ports: list[ContainerPort] = field(default_factory=list)
    volume_mounts: list[VolumeMount] = field(default_factory=list)


@dataclass
class Application:
    name: str = ""
    version: str = ""
    namespace: str = ""
    system: bool = False
    services: list[Service] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)


@dataclass
class Configuration:
    name: str = ""
    version: str = ""
    namespace: str = ""
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class Secret:
    name: str = ""
    version: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    data: dict[str, bytes] = field(default_factory=dict)
    system: bool = False


@dataclass
class Message:
    kind: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    content: Any = None


class Shadow(dict):
    """A free-form document holding application lists and statistics."""

    def app_infos(self, is_sys: bool) -> list[AppInfo] | None:
        """Return the application list, or None when the shadow has none."""
        value = self.get(_APPS_KEY[bool(is_sys)])
        if value is None:
            return None
        return [AppInfo.from_value(item) for item in value]

    def set_app_infos(self, is_sys: bool, apps: Iterable[AppInfo]) -> None:
        self[_APPS_KEY[bool(is_sys)]] = [AppInfo.from_value(app) for app in apps]

    def app_stats(self, is_sys: bool) -> list[AppStats] | None:
        """Return the application statistics, or None when the shadow has none."""
        value = self.get(_STATS_KEY[bool(is_sys)])
        if value is None:
            return None
        return [AppStats.from_value(item) for item in value]

    def set_app_stats(self, is_sys: bool, stats: Iterable[AppStats]) -> None:
        self[_STATS_KEY[bool(is_sys)]] = [AppStats.from_value(s) for s in stats]


class Report(Shadow):
    """What the node reports about itself."""


class Desire(Shadow):
    """What the cloud wants the node to run."""


@dataclass
class Node:
    name: str = ""
    report: Report = field(default_factory=Report)
    desire: Desire = field(default_factory=Desire)


def is_config_object(key: str) -> bool:
    """Tell whether a configuration data key refers to a downloaded object."""
    return key.startswith(CONFIG_OBJECT_PREFIX)