"""Deterministic run summaries built from the test metrics stream."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np

# Record fields that count things rather than measure the network.
_COUNTERS = {"step", "index", "minibatchs", "nTrials", "nTrialsConsidered", "isError", "seed"}

# Learning curves and whether larger values are better.
_CURVES = {"successRate": True, "error": False}


def compute_auc(points: Sequence[float], steps: Sequence[float] | None = None) -> float:
    """Trapezoidal area under ``points``; the x axis is the test index unless ``steps`` is given."""

    if not points:
        return 0.0
    y = np.asarray(points, dtype=np.float64)
    x = np.arange(len(y), dtype=np.float64) if steps is None else np.asarray(steps, dtype=np.float64)
    trapezoid = getattr(np, "trapezoid", None) or np.trapz
    return float(trapezoid(y, x))


def _read_records(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def _describe(values: np.ndarray, tail: int) -> Dict[str, float] | None:
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return None
    return {
        "min": float(finite.min()),
        "max": float(finite.max()),
        "mean": float(finite.mean()),
        "last": float(values[-1]),
        "tail_auc": compute_auc(values[-tail:].tolist()) if tail else 0.0,
    }


def _progress(values: np.ndarray, steps: np.ndarray, higher_is_better: bool) -> Dict[str, Any]:
    """Where a learning curve peaked and how many tests improved on the running best."""

    signed = values if higher_is_better else -values
    signed = np.where(np.isfinite(signed), signed, -np.inf)
    running = np.maximum.accumulate(signed)
    improvements = int(np.count_nonzero(signed[1:] > running[:-1])) if signed.size > 1 else 0
    best = int(np.argmax(signed))
    return {
        "first": float(values[0]),
        "best": float(values[best]),
        "best_minibatchs": int(steps[best]),
        "improvements": improvements,
    }


def summarize(records: Sequence[Mapping[str, Any]], *, tail: int = 32) -> Dict[str, Any]:
    tail_window = min(tail, len(records))
    columns: Dict[str, List[float]] = {}
    for record in records:
        for key, value in record.items():
            if key not in _COUNTERS and isinstance(value, (int, float)):
                columns.setdefault(key, []).append(float(value))

    metrics = {}
    for name, values in sorted(columns.items()):
        described = _describe(np.asarray(values, dtype=np.float64), tail_window)
        if described is not None:
            metrics[name] = described

    steps = np.asarray([record.get("step", i) for i, record in enumerate(records)], dtype=np.int64)
    learning = {
        name: _progress(np.asarray(columns[name], dtype=np.float64), steps, higher)
        for name, higher in _CURVES.items()
        if len(columns.get(name, ())) == len(records) and records
    }
    return {
        "version": 1,
        "tests": len(records),
        "tail_window": tail_window,
        "metrics": metrics,
        "learning": learning,
    }


def write_summary(
    metrics_jsonl: str | Path,
    out_summary_json: str | Path,
    *,
    tail: int = 32,
    best: Mapping[str, Any] | None = None,
) -> str:
    """Summarise the test records of ``metrics_jsonl`` into ``out_summary_json``."""

    out_path = Path(out_summary_json)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    summary = summarize(_read_records(Path(metrics_jsonl)), tail=tail)
    summary["best"] = dict(best) if best else None
    out_path.write_text(json.dumps(summary, sort_keys=True, indent=2))
    return str(out_path)


__all__ = ["compute_auc", "summarize", "write_summary"]
