"""Rules for choosing which applications to apply, delete and report."""

from __future__ import annotations

import re
from typing import Iterable, MutableMapping

from .models import (
    STATUS_UNKNOWN,
    Application,
    AppInfo,
    AppStats,
    Configuration,
    Desire,
    InstanceStats,
    is_config_object,
)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_INTEGER = re.compile(r"[+-]?[0-9]+")


def _record_cause(
    stats: MutableMapping[str, AppStats],
    apps: MutableMapping[str, Application],
    app_name: str,
    service_name: str,
    cause: str,
) -> None:
    stat = stats.get(app_name)
    if stat is None:
        app = apps.get(app_name)
        stat = AppStats(name=app_name, version=app.version if app else "", status=STATUS_UNKNOWN)
        stats[app_name] = stat
    if stat.instance_stats is None:
        stat.instance_stats = {}
    instance = stat.instance_stats.get(service_name)
    if instance is None:
        instance = InstanceStats(service_name=service_name, status=STATUS_UNKNOWN)
        stat.instance_stats[service_name] = instance
    instance.cause += cause


def _drop(names: Iterable[str], apps: MutableMapping, update: MutableMapping) -> None:
    for name in names:
        update.pop(name, None)
        apps.pop(name, None)


def check_service(infos, apps, stats, update) -> None:
    """Reject applications whose service names collide with another application.

    Among colliding applications the first one already running (present in
    ``stats``) is kept, otherwise the first one listed; the others get a cause
    recorded in ``stats`` and are removed from ``update`` and ``apps``.
    """
    services: dict[str, list[str]] = {}
    for info in infos:
        app = apps.get(info.name)
        if app is None:
            continue
        for svc in app.services:
            services.setdefault(svc.name, []).append(app.name)

    rejected: set[str] = set()
    for svc_name, app_names in services.items():
        if len(app_names) <= 1:
            continue
        first = next((n for n in app_names if n in stats), app_names[0])
        for app_name in app_names:
            if app_name == first:
                continue
            _record_cause(
                stats,
                apps,
                app_name,
                svc_name,
                f"service [{svc_name}] in application [{app_name}] collide with application [{first}]",
            )
            rejected.add(app_name)
    _drop(rejected, apps, update)


def check_port(infos, apps, stats, update) -> None:
    """Reject applications with invalid or colliding host ports."""
    ports: dict[int, list[str]] = {}
    owners: dict[str, str] = {}
    rejected: set[str] = set()
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
                    _record_cause(
                        stats,
                        apps,
                        app.name,
                        svc.name,
                        f"service [{svc.name}] with replica > 1 can not configure host port",
                    )
                    rejected.add(app.name)
                else:
                    ports.setdefault(port.host_port, []).append(svc.name)

    def running(svc_name: str) -> bool:
        stat = stats.get(owners[svc_name])
        return stat is not None and svc_name in (stat.instance_stats or {})

    for port, svc_names in ports.items():
        if len(svc_names) <= 1:
            continue
        first = next((s for s in svc_names if running(s)), svc_names[0])
        for svc_name in svc_names:
            if svc_name == first:
                continue
            app_name = owners[svc_name]
            _record_cause(
                stats,
                apps,
                app_name,
                svc_name,
                f"port [{port}] in service [{svc_name}] collide with service [{first}]",
            )
            rejected.add(app_name)
    _drop(rejected, apps, update)


def make_key(kind: str, name: str, version: str) -> str | None:
    """Build the storage key of a versioned object, or None if name or version is empty."""
    if not name or not version:
        return None
    return f"{kind}-{name}-{version}"


def align_apps(report_apps, desire_apps):
    """Order reported apps like the desired ones; unknown ones follow at the end."""
    if not report_apps or not desire_apps:
        return report_apps
    remaining = {a.name: a for a in report_apps}
    aligned = [remaining.pop(a.name) for a in desire_apps if a.name in remaining]
    aligned.extend(remaining.values())
    return aligned


def is_object_config(cfg: Configuration) -> bool:
    """Tell whether a configuration holds any downloadable object."""
    return any(is_config_object(key) for key in cfg.data)


def get_delete_and_update(
    desires: Iterable[AppInfo], reports: Iterable[AppInfo]
) -> tuple[dict[str, AppInfo], dict[str, AppInfo]]:
    """Split apps into those to delete and those to (re)apply."""
    desires = list(desires or ())
    update = {d.name: d for d in desires}
    delete: dict[str, AppInfo] = {}
    for r in reports or ():
        delete[r.name] = r
        wanted = update.get(r.name)
        if wanted is not None and wanted.version == r.version:
            del update[r.name]
    for d in desires:
        delete.pop(d.name, None)
    return delete, update


def filter_app_like(apps, like):
    """For each pattern keep the first app whose name contains it."""
    apps = list(apps or ())
    if like is None:
        return apps
    result = []
    for module in like:
        match = next((a for a in apps if module in a.name), None)
        if match is not None:
            result.append(match)
    return result


def filter_app_not_like(apps, not_like):
    """Keep the apps whose name contains none of the patterns."""
    apps = list(apps or ())
    if not_like is None:
        return apps
    return [a for a in apps if not any(module in a.name for module in not_like)]


def filter_desire(desire: Desire, like, not_like) -> Desire:
    """Return a desire holding only the filtered system and user app lists."""
    result = Desire()
    for is_sys in (True, False):
        apps = filter_app_like(desire.app_infos(is_sys), like)
        result.set_app_infos(is_sys, filter_app_not_like(apps, not_like))
    return result


def _parse_non_negative(value: str, name: str) -> int:
    if not value:
        return 0
    if not _INTEGER.fullmatch(value):
        raise ValueError(f"invalid syntax for {name}: {value!r}")
    number = int(value)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise ValueError(f"value out of range for {name}: {value!r}")
    if number < 0:
        raise ValueError(f"The request parameter is invalid.({name} is invalid)")
    return number


def valid_param(tail_lines: str, since_seconds: str) -> tuple[int, int]:
    """Parse the log query parameters; empty ones become 0."""
    return (
        _parse_non_negative(tail_lines, "tailLines"),
        _parse_non_negative(since_seconds, "sinceSeconds"),
    )