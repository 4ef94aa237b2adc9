"""Best-test selection policy."""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from enum import Enum

from ..core.types import TestResult


class EvaluationMode(str, Enum):
    MAXSUCCESSRATE_MINERROR = "MAXSUCCESSRATE_MINERROR"
    MAXSUCCESSRATE = "MAXSUCCESSRATE"
    MINERROR = "MINERROR"

    @classmethod
    def parse(cls, value: "str | EvaluationMode") -> "EvaluationMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown evaluation type: {value}") from None


@dataclass(frozen=True)
class Evaluation:
    is_best: bool = False
    value: float = -1.0


class Evaluator:
    """Decide whether a test result supersedes the best one seen so far.

    Only the best success rate and the best error are kept.
    """

    def __init__(self, mode: "str | EvaluationMode") -> None:
        self.mode = EvaluationMode.parse(mode)
        self.reset()

    def reset(self) -> None:
        self.max_success_rate = float("-inf")
        self.min_error = float("inf")

    @property
    def is_consider_error(self) -> bool:
        return self.mode is not EvaluationMode.MAXSUCCESSRATE

    def is_best_test(self, result: TestResult) -> Evaluation:
        if self.mode is EvaluationMode.MAXSUCCESSRATE:
            return self._max_success_rate(result)
        if self.mode is EvaluationMode.MINERROR:
            return self._min_error(result)
        return self._max_success_rate_min_error(result)

    # ------------------------------------------------------------------
    # Internal helpers

    def _max_success_rate(self, result: TestResult) -> Evaluation:
        rate = result.success_rate
        is_best = rate > self.max_success_rate
        if is_best:
            self.max_success_rate = rate
        return Evaluation(is_best, rate)

    def _min_error(self, result: TestResult) -> Evaluation:
        if not result.is_error:
            warnings.warn("Test result carries no error to benchmark", RuntimeWarning, stacklevel=3)
            return Evaluation()
        error = result.error
        is_best = error < self.min_error
        if is_best:
            self.min_error = error
        return Evaluation(is_best, error)

    def _max_success_rate_min_error(self, result: TestResult) -> Evaluation:
        if not result.is_error:
            warnings.warn("Test result carries no error to benchmark", RuntimeWarning, stacklevel=3)
            return Evaluation()
        rate, error = result.success_rate, result.error
        if not (math.isfinite(rate) and math.isfinite(error)):
            return Evaluation(False, error)
        if rate > self.max_success_rate:
            self.max_success_rate = rate
            self.min_error = error
            return Evaluation(True, error)
        if rate == self.max_success_rate and error < self.min_error:
            self.min_error = error
            return Evaluation(True, error)
        return Evaluation(False, error)


__all__ = ["Evaluation", "EvaluationMode", "Evaluator"]
