"""Reclaiming space held by object configurations no application uses."""

from __future__ import annotations

import logging
import os
import shutil

from .conflicts import is_object_config, make_key
from .models import Application, Configuration, Kind, Node
from .store import KeyNotFoundError, ObjectStore

log = logging.getLogger(__name__)


def recycle(store: ObjectStore, node: Node, download_path: str | os.PathLike) -> list[str]:
    """Delete unused object configurations and their downloaded directories.

    Returns the store keys that were removed. Raises KeyNotFoundError when an
    application referenced by the node is missing from the store.
    """
    log.info("start recycling useless object storage space")
    infos = []
    for shadow in (node.report, node.desire):
        for is_sys in (False, True):
            infos.extend(shadow.app_infos(is_sys) or [])

    used: set[str] = set()
    for info in infos:
        app: Application = store.get(make_key(Kind.APPLICATION, info.name, info.version))
        for volume in app.volumes:
            if volume.config is not None:
                used.add(make_key(Kind.CONFIGURATION, volume.config.name, volume.config.version))

    unused: dict[str, Configuration] = {}
    for cfg in store.for_each(Configuration):
        if is_object_config(cfg):
            key = make_key(Kind.CONFIGURATION, cfg.name, cfg.version)
            if key not in used:
                unused[key] = cfg

    for key, cfg in unused.items():
        try:
            store.delete(key)
        except KeyNotFoundError as exc:
            log.error("failed to delete configuration: %s", exc)
        directory = os.path.join(download_path, cfg.name)
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError:
            log.error("failed to clean dir %s", directory)
    log.info("complete recycling useless object storage space")
    return sorted(unused)