"""Detection of service-name and host-port collisions between applications."""

from __future__ import annotations

from .models import (
    UNKNOWN,
    AppInfo,
    Application,
    AppStats,
    Configuration,
    InstanceStats,
    Kind,
    is_config_object,
)


def _add_cause(
    stats: dict[str, AppStats],
    app_name: str,
    version: str,
    service_name: str,
    cause: str,
) -> None:
    stat = stats.get(app_name)
    if stat is None:
        stat = AppStats(name=app_name, version=version, status=UNKNOWN)
    instance = stat.instance_stats.get(service_name)
    if instance is None:
        instance = InstanceStats(service_name=service_name, status=UNKNOWN)
    instance.cause += cause
    stat.instance_stats[service_name] = instance
    stats[app_name] = stat


def _version_of(apps: dict[str, Application], name: str) -> str:
    app = apps.get(name)
    return app.version if app is not None else ""


def _drop(names: set[str], update: dict, apps: dict) -> None:
    for name in names:
        update.pop(name, None)
        apps.pop(name, None)


def check_service(
    infos: list[AppInfo],
    apps: dict[str, Application],
    stats: dict[str, AppStats],
    update: dict[str, AppInfo],
) -> None:
    """Keep one application per service name; drop the others from update and apps.

    An application already running (present in stats) wins; otherwise the first one does.
    """
    services: dict[str, list[str]] = {}
    for info in infos:
        app = apps.get(info.name)
        if app is None:
            continue
        for svc in app.services:
            services.setdefault(svc.name, []).append(app.name)

    dropped: set[str] = set()
    for svc_name, app_names in services.items():
        if len(app_names) <= 1:
            continue
        first = next((name for name in app_names if name in stats), app_names[0])
        for app_name in app_names:
            if app_name == first:
                continue
            _add_cause(
                stats,
                app_name,
                _version_of(apps, app_name),
                svc_name,
                f"service [{svc_name}] in application [{app_name}] "
                f"collide with application [{first}]",
            )
            dropped.add(app_name)
    _drop(dropped, update, apps)


def check_port(
    infos: list[AppInfo],
    apps: dict[str, Application],
    stats: dict[str, AppStats],
    update: dict[str, AppInfo],
) -> None:
    """Keep one service per host port and refuse host ports on replicated services."""
    ports: dict[int, list[str]] = {}
    owners: dict[str, str] = {}
    dropped: set[str] = set()
    for info in infos:
        app = apps.get(info.name)
        if app is None:
            continue
        for svc in app.services:
            owners[svc.name] = app.name
            for port in svc.ports:
                if port.host_port == 0:
                    continue
                if svc.replica > 1:
                    _add_cause(
                        stats,
                        app.name,
                        app.version,
                        svc.name,
                        f"service [{svc.name}] with relica > 1 can not configure host port",
                    )
                    dropped.add(app.name)
                else:
                    ports.setdefault(port.host_port, []).append(svc.name)

    for port, svc_names in ports.items():
        if len(svc_names) <= 1:
            continue

        def running(svc_name: str) -> bool:
            stat = stats.get(owners.get(svc_name, ""))
            return stat is not None and svc_name in stat.instance_stats

        first = next((name for name in svc_names if running(name)), svc_names[0])
        for svc_name in svc_names:
            if svc_name == first:
                continue
            app_name = owners.get(svc_name, "")
            _add_cause(
                stats,
                app_name,
                _version_of(apps, app_name),
                svc_name,
                f"port [{port}] in service [{svc_name}] collide with service [{first}]",
            )
            dropped.add(app_name)
    _drop(dropped, update, apps)


def make_key(kind: Kind | str, name: str, version: str) -> str:
    """Build the store key of an object; empty when name or version is missing."""
    if not name or not version:
        return ""
    return f"{Kind(kind).value}-{name}-{version}"


def align_apps(reported: list[AppInfo], desired: list[AppInfo]) -> list[AppInfo]:
    """Order reported apps like the desired list, keeping extra ones at the end."""
    if not reported or not desired:
        return reported
    remaining = {app.name: app for app in reported}
    result = [remaining.pop(app.name) for app in desired if app.name in remaining]
    result.extend(remaining.values())
    return result


def is_object_config(cfg: Configuration) -> bool:
    """Tell whether a configuration refers to downloaded objects."""
    return any(is_config_object(key) for key in cfg.data)