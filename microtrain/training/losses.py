"""Cost registry used by the output layer backpropagation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable

import numpy as np

from ..core.types import Array

CostFn = Callable[[Array, Array], float]

_EPS = 1e-6


@dataclass(frozen=True)
class Cost:
    """Cost kind: the kernel producing ``dC/da`` and a scalar value for monitoring."""

    name: str
    kernel: str
    fn: CostFn

    def __call__(self, outputs: Array, expected: Array) -> float:
        return self.fn(outputs, expected)


class CostRegistry:
    """Central registry for cost functions."""

    def __init__(self) -> None:
        self._registry: Dict[str, Cost] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, name: str, kernel: str, fn: CostFn) -> None:
        self._registry[name] = Cost(name, kernel, fn)

    def alias(self, alias: str, name: str) -> None:
        self._aliases[alias] = name

    def get(self, name: str) -> Cost:
        name = self._aliases.get(name, name)
        try:
            return self._registry[name]
        except KeyError:
            available = ", ".join(sorted(self._registry))
            raise KeyError(f"Unknown cost {name!r}. Available costs: {available}") from None

    def names(self) -> Iterable[str]:
        return sorted(self._registry)

    def __contains__(self, name: str) -> bool:
        return self._aliases.get(name, name) in self._registry


REGISTRY = CostRegistry()


def _quadratic(outputs: Array, expected: Array) -> float:
    return float(0.5 * np.mean(np.square(outputs - expected)))


def _cross_entropy(outputs: Array, expected: Array) -> float:
    a = np.clip(outputs, _EPS, 1.0 - _EPS)
    return float(-np.mean(expected * np.log(a) + (1.0 - expected) * np.log(1.0 - a)))


REGISTRY.register("quadratic", "bp_quadratic", _quadratic)
REGISTRY.register("crossEntropy", "bp_cross_entropy", _cross_entropy)
# Spelling used by older network documents
REGISTRY.alias("cross-entropy", "crossEntropy")
REGISTRY.alias("crossentropy", "crossEntropy")

__all__ = ["Cost", "CostRegistry", "REGISTRY"]
