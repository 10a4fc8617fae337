from __future__ import annotations
import os

CONFIG_FILE = os.environ.get("FORGE_CONFIG", "forge.yaml")
CACHE_DIR = os.environ.get("FORGE_CACHE_DIR", ".forge/cache")
LOG_DIR = os.environ.get("FORGE_LOG_DIR", ".forge/logs")
DOCKER_BIN = os.environ.get("FORGE_DOCKER_BIN", "docker")


def default_workers() -> int:
    workers = os.environ.get("FORGE_WORKERS")
    if workers:
        return max(1, int(workers))
    return max(4, os.cpu_count() or 1)
