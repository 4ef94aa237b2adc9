"""Run manifest: what was trained, with which code, and which files it produced."""

from __future__ import annotations

import hashlib
import json
import platform
import subprocess
import time
from pathlib import Path
from typing import Iterable, Mapping

import numpy as np


def git_sha() -> str:
    try:
        out = subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL)
        return out.decode().strip()
    except Exception:  # pragma: no cover - git may be unavailable in tests
        return "unknown"


def file_digest(path: str | Path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _describe_files(paths: Iterable[str | Path]) -> dict:
    files = {}
    for entry in paths:
        path = Path(entry)
        if path.is_file():
            files[path.name] = {"bytes": path.stat().st_size, "sha256": file_digest(path)}
    return files


def write_manifest(
    path: str | Path,
    *,
    config: Mapping[str, object],
    network: Mapping[str, object],
    dispatch: Mapping[str, int] | None = None,
    files: Iterable[str | Path] = (),
) -> str:
    """Record the run config, network shape, kernel dispatch counts and produced files."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    manifest = {
        "git_sha": git_sha(),
        "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "config": config,
        "network": dict(network),
        "dispatch": dict(sorted((dispatch or {}).items())),
        "files": _describe_files(files),
        "environment": {
            "python": platform.python_version(),
            "numpy": np.__version__,
            "platform": platform.platform(terse=True),
        },
    }
    path.write_text(json.dumps(manifest, indent=2))
    return str(path)


__all__ = ["file_digest", "git_sha", "write_manifest"]
