"""Metrics sinks fed by the trainer monitoring callbacks."""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Mapping

from .artifacts import git_sha


def _numeric(metrics: Mapping[str, Any]) -> dict:
    return {k: float(v) for k, v in metrics.items() if isinstance(v, (int, float))}


class JsonlSink:
    """Append-only JSONL writer.

    ``on_minibatch`` records the training cost and speed, ``on_test`` records
    one line per test cycle. Pass ``split`` to tell the two streams apart.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        split: str = "test",
        seed: int | None = None,
        sha: str | None = None,
    ) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("")
        self.split = split
        self.seed = seed
        self.sha = sha or git_sha()

    def _write(self, step: int, metrics: Mapping[str, Any]) -> None:
        record = {
            "step": int(step),
            "split": self.split,
            "seed": self.seed,
            "sha": self.sha,
        }
        record.update(_numeric(metrics))
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record) + "\n")

    def on_minibatch(self, count: int, infos: Mapping[str, Any]) -> None:
        if self.split == "train":
            self._write(count, infos)

    def on_test(self, index: int, result: Any) -> None:
        if self.split == "test":
            self._write(result.minibatchs, result.to_dict())

    __call__ = on_test


class CsvSink:
    """Write test results to CSV with a stable schema."""

    def __init__(self, path: str | Path, *, split: str = "test") -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("")
        self.split = split

    def _write(self, step: int, metrics: Mapping[str, Any]) -> None:
        row = {"step": int(step), "split": self.split}
        row.update(_numeric(metrics))
        with self.path.open("a", encoding="utf-8", newline="") as handle:
            fieldnames = sorted(row.keys())
            writer = csv.DictWriter(handle, fieldnames=fieldnames)
            if handle.tell() == 0:
                writer.writeheader()
            writer.writerow(row)

    def on_minibatch(self, count: int, infos: Mapping[str, Any]) -> None:
        if self.split == "train":
            self._write(count, infos)

    def on_test(self, index: int, result: Any) -> None:
        if self.split == "test":
            self._write(result.minibatchs, result.to_dict())


__all__ = ["CsvSink", "JsonlSink"]
