"""The engine that reports node state and applies the applications the cloud desires."""

from __future__ import annotations

import dataclasses
import hashlib
import ipaddress
import logging
import os
import queue
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Iterable, Mapping, Protocol

from .clean import recycle
from .conflicts import align_apps, check_port, check_service, make_key
from .models import (
    BAETYL_CORE,
    BAETYL_INIT,
    AppInfo,
    Application,
    AppStats,
    Configuration,
    Desire,
    Kind,
    Node,
    ObjectReference,
    Report,
    Secret,
    Volume,
    VolumeMount,
)
from .store import KeyNotFoundError, ObjectStore

log = logging.getLogger(__name__)

SYSTEM_CERT_VOLUME_PREFIX = "baetyl-cert-volume-"
SYSTEM_CERT_SECRET_PREFIX = "baetyl-cert-secret-"

TOPIC_DOWNSIDE = "downside"

EDGE_NAMESPACE = "baetyl-edge"
EDGE_SYSTEM_NAMESPACE = "baetyl-edge-system"
SYSTEM_CERT_PATH = "var/lib/baetyl/system/certs"
SYSTEM_CERT_CA = "ca.pem"
SYSTEM_CERT_CRT = "crt.pem"
SYSTEM_CERT_KEY = "key.pem"

ENV_APP_NAME = "BAETYL_APP_NAME"
ENV_SERVICE_NAME = "BAETYL_SERVICE_NAME"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class AltNames:
    """Subject alternative names of an issued certificate."""

    ips: list[ipaddress.IPv4Address | ipaddress.IPv6Address] = field(default_factory=list)
    dns_names: list[str] = field(default_factory=list)


@dataclass
class Certificate:
    """A PEM certificate and its private key."""

    crt: bytes = b""
    key: bytes = b""


class InvalidParameterError(ValueError):
    """Raised when a request parameter cannot be accepted."""


class NodeShadow(Protocol):
    def get(self) -> Node: ...

    def report(self, report: Report, override: bool) -> Mapping[str, Any] | None: ...


class Syncer(Protocol):
    def sync_apps(self, infos: list[AppInfo]) -> dict[str, Application]: ...

    def sync_resource(self, info: AppInfo) -> None: ...

    def prepare_app(
        self,
        host_path: str,
        object_path: str,
        app: Application,
        configs: dict[str, Configuration],
    ) -> None: ...


class Security(Protocol):
    def get_ca(self) -> bytes: ...

    def issue_certificate(self, common_name: str, alt_names: AltNames) -> Certificate: ...


class Pubsub(Protocol):
    def subscribe(self, topic: str) -> Any: ...

    def unsubscribe(self, topic: str, channel: Any) -> None: ...

    def publish(self, topic: str, message: Any) -> None: ...


@dataclass
class _Settings:
    mode: str
    host_path_lib: str
    download_path: str
    report_interval: float
    namespace: str
    system_namespace: str
    service_name: str
    app_name: str
    cert_path: str

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> _Settings:
        return cls(
            mode=config.get("mode", "kube"),
            host_path_lib=str(config.get("host_path_lib", "/var/lib/baetyl")),
            download_path=str(config.get("download_path", "var/lib/baetyl/object")),
            report_interval=float(config.get("report_interval", 20)),
            namespace=config.get("namespace", EDGE_NAMESPACE),
            system_namespace=config.get("system_namespace", EDGE_SYSTEM_NAMESPACE),
            service_name=config.get("service_name", os.environ.get(ENV_SERVICE_NAME, "")),
            app_name=config.get("app_name", os.environ.get(ENV_APP_NAME, "")),
            cert_path=str(config.get("cert_path", SYSTEM_CERT_PATH)),
        )


def _alt_names(service_name: str, namespace: str) -> AltNames:
    return AltNames(
        ips=[ipaddress.IPv4Address("0.0.0.0"), ipaddress.IPv4Address("127.0.0.1")],
        dns_names=[f"{service_name}.{namespace}", service_name, "localhost"],
    )


def _write_file(path: str, data: bytes) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(data)


def gen_system_cert(
    security: Security, app_name: str, service_name: str, cert_path: str | os.PathLike
) -> None:
    """Issue the certificate of this service and write CA, certificate and key files."""
    ca = security.get_ca()
    cert = security.issue_certificate(
        f"{app_name}.{service_name}", _alt_names(service_name, EDGE_SYSTEM_NAMESPACE)
    )
    base = os.fspath(cert_path)
    _write_file(os.path.join(base, SYSTEM_CERT_CA), ca)
    _write_file(os.path.join(base, SYSTEM_CERT_CRT), cert.crt)
    _write_file(os.path.join(base, SYSTEM_CERT_KEY), cert.key)


def get_delete_and_update(
    desires: Iterable[AppInfo], reports: Iterable[AppInfo]
) -> tuple[dict[str, AppInfo], dict[str, AppInfo]]:
    """Split apps into those to delete and those to (re)apply."""
    desires = list(desires or [])
    update = {d.name: d for d in desires}
    delete: dict[str, AppInfo] = {}
    for r in reports or []:
        delete[r.name] = r
        app = update.get(r.name)
        if app is not None and app.version == r.version:
            del update[app.name]
    for app in desires:
        delete.pop(app.name, None)
    return delete, update


def filter_app_like(apps: list[AppInfo] | None, like: list[str] | None) -> list[AppInfo] | None:
    """For each pattern keep the first app whose name contains it."""
    if like is None:
        return apps
    apps = apps or []
    result = []
    for module in like:
        match = next((app for app in apps if module in app.name), None)
        if match is not None:
            result.append(match)
    return result


def filter_app_not_like(
    apps: list[AppInfo] | None, not_like: list[str] | None
) -> list[AppInfo] | None:
    """Keep the apps whose names contain none of the patterns."""
    if not_like is None:
        return apps
    return [app for app in apps or [] if not any(m in app.name for m in not_like)]


def filter_desire(desire: Desire, like: list[str] | None, not_like: list[str] | None) -> Desire:
    """Return a desire holding only the filtered system and user application lists."""
    result = Desire()
    for is_sys in (True, False):
        apps = filter_app_like(desire.app_infos(is_sys), like)
        apps = filter_app_not_like(apps, not_like)
        result.set_app_infos(is_sys, apps or [])
    return result


def _parse_int64(name: str, value: str) -> int:
    if not _INTEGER.fullmatch(value):
        raise InvalidParameterError(f'parsing "{value}": invalid syntax')
    number = int(value)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise InvalidParameterError(f'parsing "{value}": value out of range')
    if number < 0:
        raise InvalidParameterError(f"The request parameter is invalid.({name} is invalid)")
    return number


def valid_param(tail_lines: str, since_seconds: str) -> tuple[int, int]:
    """Parse the log query parameters; empty ones count as zero."""
    tail = _parse_int64("tailLines", tail_lines) if tail_lines else 0
    since = _parse_int64("sinceSeconds", since_seconds) if since_seconds else 0
    return tail, since


class Engine:
    """Reports node and application state and applies desired applications.

    ``config`` is a mapping with optional keys ``mode``, ``host_path_lib``,
    ``download_path``, ``report_interval`` (seconds), ``namespace``,
    ``system_namespace``, ``service_name``, ``app_name`` and ``cert_path``.
    """

    def __init__(
        self,
        config: Mapping[str, Any],
        store: ObjectStore,
        node: NodeShadow,
        syncer: Syncer,
        ami: Any,
        security: Security | None,
        pubsub: Pubsub | None,
    ) -> None:
        self._settings = _Settings.from_mapping(config)
        log.info("app running mode: %s", self._settings.mode)
        self._store = store
        self._node = node
        self._syncer = syncer
        self._ami = ami
        self._security = security
        self._pubsub = pubsub
        self.host_host_path = os.path.join(self._settings.host_path_lib, "host")
        self.object_host_path = os.path.join(self._settings.host_path_lib, "object")
        self.downside_handler: Any = None
        self._downside_chan: Any = None
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []
        self._stats_lock = threading.Lock()
        if security is not None:
            gen_system_cert(
                security,
                self._settings.app_name,
                self._settings.service_name,
                self._settings.cert_path,
            )

    # lifecycle

    def start(self) -> None:
        """Start periodic reporting and processing of downside messages."""
        self._stopped.clear()
        self._spawn(self._reporting)
        if self._pubsub is None:
            return
        try:
            self._downside_chan = self._pubsub.subscribe(TOPIC_DOWNSIDE)
        except Exception as exc:
            log.error("failed to subscribe downside topic %s: %s", TOPIC_DOWNSIDE, exc)
            return
        self._spawn(self._process_downside)

    def close(self) -> None:
        log.debug("engine close")
        self._stopped.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        if self._pubsub is not None and self._downside_chan is not None:
            try:
                self._pubsub.unsubscribe(TOPIC_DOWNSIDE, self._downside_chan)
            except Exception:
                log.warning("failed to unsubscribe topic downside")
            self._downside_chan = None

    def _spawn(self, target) -> None:
        thread = threading.Thread(target=target, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _reporting(self) -> None:
        log.info("engine starts to report")
        while not self._stopped.wait(self._settings.report_interval):
            try:
                self._report_and_desire(delete=True)
            except Exception as exc:
                log.error("failed to report local shadow: %s", exc)
            else:
                log.debug("engine reports local shadow")
        log.info("engine has stopped reporting")

    def _process_downside(self) -> None:
        chan = self._downside_chan
        while not self._stopped.is_set():
            try:
                msg = chan.get(timeout=0.05)
            except queue.Empty:
                continue
            handler = self.downside_handler
            if handler is None:
                log.debug("no downside handler, message dropped")
                continue
            try:
                handler.on_message(msg)
            except Exception as exc:
                log.error("failed to handle downside message: %s", exc)

    # reporting

    def report_and_desire(self) -> None:
        """Report once and apply the desired apps without deleting any."""
        self._report_and_desire(delete=False)

    def _report_and_desire(self, delete: bool) -> None:
        node = self._node.get()
        try:
            self._recycle_if_need(node)
        except Exception as exc:
            log.error("failed to recycle: %s", exc)
        self._report_and_apply(True, delete, node.desire)
        self._report_and_apply(False, delete, node.desire)

    def _recycle_if_need(self, node: Node) -> None:
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
        if stats is not None and _field(stats, "diskPressure", "disk_pressure"):
            recycle(self._store, node, self._settings.download_path)

    def collect(self, namespace: str, is_sys: bool, desire: Desire | None) -> Report:
        """Gather node info, node stats and app stats into a report."""
        node_info = self._try(self._ami.collect_node_info, "failed to collect node info")
        node_stats = self._try(self._ami.collect_node_stats, "failed to collect node stats")
        app_stats = self._try(
            lambda: self._ami.stats_apps(namespace), "failed to collect app stats"
        )
        mode_info = self._try(self._ami.get_mode_info, "failed to get mode info")
        stats = list(app_stats or [])
        apps = [AppInfo(s.name, s.version) for s in stats]
        if desire is not None:
            apps = align_apps(apps, desire.app_infos(is_sys) or [])
        report = Report(
            {
                "time": datetime.now(timezone.utc),
                "modeinfo": mode_info,
                "node": node_info,
                "nodestats": node_stats,
            }
        )
        report.set_app_infos(is_sys, apps)
        report.set_app_stats(is_sys, stats)
        return report

    @staticmethod
    def _try(func, message: str) -> Any:
        try:
            return func()
        except Exception as exc:
            log.warning("%s: %s", message, exc)
            return None

    def _namespace(self, is_sys: bool) -> str:
        return self._settings.system_namespace if is_sys else self._settings.namespace

    def _report_and_apply(self, is_sys: bool, delete: bool, desire: Desire | None) -> None:
        ns = self._namespace(is_sys)
        report = self.collect(ns, is_sys, desire)
        reported = report.app_infos(is_sys)
        delta = self._node.report(report, False)
        if delta is None:
            return
        desired = Desire(delta).app_infos(is_sys)
        if desired is None:
            return

        if self._settings.service_name == BAETYL_CORE:
            desired = filter_app_not_like(desired, [BAETYL_CORE])
            reported = filter_app_not_like(reported, [BAETYL_CORE])
        elif self._settings.service_name == BAETYL_INIT:
            desired = filter_app_like(desired, [BAETYL_CORE])
            reported = filter_app_like(reported, [BAETYL_CORE])

        to_delete, update = get_delete_and_update(desired, reported)
        log.debug("delete %s, update %s", list(to_delete), list(update))

        stats = {s.name: s for s in report.app_stats(is_sys) or []}
        app_data = self._syncer.sync_apps(desired)
        check_service(desired, app_data, stats, update)
        check_port(desired, app_data, stats, update)
        self._report_app_stats_if_need(is_sys, report, stats)
        if delete:
            for name in to_delete:
                self._ami.delete_app(ns, name)
        self.apply_apps(ns, update, stats)
        self._report_app_stats_if_need(is_sys, report, stats)
        log.info("to apply applications (system=%s): %s", is_sys, desired)

    def _report_app_stats_if_need(
        self, is_sys: bool, report: Report, stats: dict[str, AppStats]
    ) -> None:
        if not stats:
            return
        report.set_app_stats(is_sys, stats.values())
        self._node.report(report, False)

    # applying

    def apply_apps(
        self, namespace: str, infos: Mapping[str, AppInfo], stats: dict[str, AppStats]
    ) -> None:
        """Apply every app concurrently, recording failures as causes in stats."""

        def apply(info: AppInfo) -> None:
            try:
                self._apply_app(namespace, info)
            except Exception as exc:
                log.error("failed to apply application %s: %s", info, exc)
                with self._stats_lock:
                    stat = stats.get(info.name) or AppStats(name=info.name, version=info.version)
                    stat.cause += str(exc)
                    stats[info.name] = stat

        infos = list(infos.values())
        if not infos:
            return
        with ThreadPoolExecutor(max_workers=len(infos)) as pool:
            list(pool.map(apply, infos))

    def _apply_app(self, namespace: str, info: AppInfo) -> None:
        self._syncer.sync_resource(info)
        try:
            app: Application = self._store.get(make_key(Kind.APPLICATION, info.name, info.version))
        except KeyNotFoundError as exc:
            raise LookupError(
                f"failed to get app name: ({info.name}) version: ({info.version}) "
                f"with error: {exc}"
            ) from exc
        configs: dict[str, Configuration] = {}
        secrets: dict[str, Secret] = {}
        for volume in app.volumes:
            if volume.config is not None:
                config = self._lookup(Kind.CONFIGURATION, "config", volume.config)
                configs[config.name] = config
            elif volume.secret is not None:
                secret = self._lookup(Kind.SECRET, "secret", volume.secret)
                secrets[secret.name] = secret
        self._syncer.prepare_app(self.host_host_path, self.object_host_path, app, configs)
        if (
            self._security is not None
            and BAETYL_CORE not in app.name
            and BAETYL_INIT not in app.name
        ):
            self._inject_cert(app, secrets)
        self._ami.apply_app(namespace, app, configs, secrets)

    def _lookup(self, kind: Kind, label: str, ref: ObjectReference) -> Any:
        key = make_key(kind, ref.name, ref.version)
        if not key:
            raise LookupError(f"failed to get {label} name: ({ref.name}) version: ({ref.version})")
        try:
            return self._store.get(key)
        except KeyNotFoundError as exc:
            raise LookupError(
                f"failed to get {label} name: ({ref.name}) version: ({ref.version}) "
                f"with error: {exc}"
            ) from exc

    def _inject_cert(self, app: Application, secrets: dict[str, Secret]) -> None:
        ca = self._security.get_ca()
        ns = self._namespace(app.system)
        services = []
        for svc in app.services:
            common_name = f"{app.name}.{svc.name}"
            suffix = hashlib.md5(common_name.encode()).hexdigest()
            cert = self._security.issue_certificate(common_name, _alt_names(svc.name, ns))
            secret_name = SYSTEM_CERT_SECRET_PREFIX + suffix
            if secret_name in secrets:
                log.warning(
                    "the secret %s will be overwritten for internal communication", secret_name
                )
            secrets[secret_name] = Secret(
                name=secret_name,
                namespace=app.namespace,
                labels={"baetyl-app-name": app.name, "security-type": "certificate"},
                data={SYSTEM_CERT_CRT: cert.crt, SYSTEM_CERT_KEY: cert.key, SYSTEM_CERT_CA: ca},
                system=app.namespace == self._settings.system_namespace,
            )
            volume_name = SYSTEM_CERT_VOLUME_PREFIX + suffix
            mount = VolumeMount(
                name=volume_name, mount_path=self._settings.cert_path, read_only=True
            )
            services.append(dataclasses.replace(svc, volume_mounts=[*svc.volume_mounts, mount]))
            app.volumes.append(
                Volume(name=volume_name, secret=ObjectReference(name=secret_name))
            )
        app.services = services

    # logs

    def service_log(
        self, service: str, system: bool | str, tail_lines: str, since_seconds: str
    ) -> BinaryIO:
        """Return a reader over a service's log; raises InvalidParameterError on bad input."""
        tail, since = valid_param(tail_lines, since_seconds)
        is_sys = system is True or system == "true"
        return self._ami.fetch_log(self._namespace(is_sys), service, tail, since)


def _field(value: Any, *names: str) -> Any:
    for name in names:
        if isinstance(value, Mapping):
            if name in value:
                return value[name]
        elif hasattr(value, name):
            return getattr(value, name)
    return None