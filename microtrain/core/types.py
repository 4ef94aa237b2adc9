"""Core typing contracts for microtrain."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

Array = np.ndarray


@dataclass
class Sample:
    """A single training or testing sample produced by a problem provider.

    ``expected`` is always a tensor buffer. Classification providers also fill
    ``expected_class_index`` so that ``evaluate_test`` can compare class indices.
    """

    input: Any
    expected: Any
    delta_mask: Any = None
    clamp_mask: Any = None
    expected_class_index: int = 0
    infos: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SampleEvaluation:
    """Outcome of ``evaluate_test`` for one test sample."""

    is_consider: bool = True
    success: bool | float = False
    error: float = float("-inf")
    is_false_positive: bool = False
    is_false_negative: bool = False

    @classmethod
    def from_mapping(cls, payload: Any) -> "SampleEvaluation":
        if isinstance(payload, SampleEvaluation):
            return payload
        return cls(
            is_consider=bool(payload.get("isConsider", True)),
            success=payload.get("success", False),
            error=float(payload.get("error", float("-inf"))),
            is_false_positive=bool(payload.get("isFalsePositive", False)),
            is_false_negative=bool(payload.get("isFalseNegative", False)),
        )


@dataclass
class TestResult:
    """Aggregated outcome of one test cycle."""

    __test__ = False

    n_trials: int = 0
    n_trials_considered: int = 0
    n_success: float = 0.0
    n_false_positives: int = 0
    n_false_negatives: int = 0
    error: float = 0.0
    is_error: bool = False
    success_rate: float = 0.0
    minibatchs: int = 0
    index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nTrials": self.n_trials,
            "nTrialsConsidered": self.n_trials_considered,
            "nSuccess": self.n_success,
            "nFalsePositives": self.n_false_positives,
            "nFalseNegatives": self.n_false_negatives,
            "error": self.error,
            "isError": self.is_error,
            "successRate": self.success_rate,
            "minibatchs": self.minibatchs,
            "index": self.index,
        }


@dataclass
class LearningCurves:
    """Per-test history of success rates and errors."""

    success_rates: List[float] = field(default_factory=list)
    errors: List[float] = field(default_factory=list)

    def append(self, result: TestResult) -> None:
        self.success_rates.append(float(result.success_rate))
        self.errors.append(float(result.error))

    def to_dict(self) -> Dict[str, List[float]]:
        return {"successRates": list(self.success_rates), "errors": list(self.errors)}


@dataclass(frozen=True)
class RunResult:
    """Summary returned by :func:`microtrain.training.pipelines.run_pipeline`."""

    steps: int
    state: str
    metrics_path: str
    manifest_path: str
    summary_path: str = ""
    export_path: str = ""
    best_result: Optional[Dict[str, Any]] = None
