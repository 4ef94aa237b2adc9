"""Problem providers: sample generation and test evaluation.

The trainer only depends on the :class:`ProblemProvider` protocol. Two
providers ship with the package so that presets and tests can train without
external data: :class:`ConstantProblem` (identification) and
:class:`PatternClassificationProblem` (classification).
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict, Mapping, Protocol, runtime_checkable

import numpy as np

from ..core.tensor import TensorBuffer
from ..core.types import Array, Sample, SampleEvaluation

_HUGE = 1e20


@runtime_checkable
class ProblemProvider(Protocol):
    """Interface consumed by :class:`~microtrain.training.trainer.Trainer`."""

    def init(self, spec: Mapping[str, Any]) -> Any:
        ...

    def generate_trainingSample(self, minibatch_index: int) -> Sample:
        ...

    def generate_testingSample(self, test_index: int) -> Sample:
        ...

    def get_testsCount(self) -> int:
        ...

    def evaluate_test(self, result: Array) -> SampleEvaluation | Mapping[str, Any]:
        ...

    def needs_testSubstractExpectedTexture(self) -> bool:
        ...

    def get_evaluationType(self) -> str:
        ...


class BaseProblem:
    """Defaults for the optional parts of the provider interface."""

    kind = ""
    evaluation_type = "MINERROR"

    def init(self, spec: Mapping[str, Any]) -> Any:
        return None

    def get_testsCount(self) -> int:
        return -1

    def get_evaluationType(self) -> str:
        return self.evaluation_type

    def needs_testSubstractExpectedTexture(self) -> bool:
        return False

    def get_exportData(self) -> Dict[str, Any]:
        return {}

    def generate_trainingSample(self, minibatch_index: int) -> Sample:  # pragma: no cover - interface
        raise NotImplementedError

    def generate_testingSample(self, test_index: int) -> Sample:  # pragma: no cover - interface
        raise NotImplementedError


def identification_error(result: Array) -> float:
    """Mean absolute residual over every channel; diverged values count as zero."""

    values = np.abs(np.asarray(result, dtype=np.float64)).reshape(-1)
    if values.size == 0:
        return float("inf")
    return float(np.where(values > _HUGE, 0.0, values).mean())


def one_hot_tensor(index: int, width: int) -> Array:
    """Expected tensor of a classification sample: class ``i`` lights pixel ``(i % w, i // w)``."""

    values = np.zeros((width, width, 4), dtype=np.float32)
    values[index // width, index % width, :] = 1.0
    return values


def classes_mask(classes_count: int, width: int) -> Array:
    """Mask keeping the first ``classes_count`` pixels in row-major order."""

    flat = np.zeros(width * width, dtype=np.float32)
    flat[:classes_count] = 1.0
    return np.repeat(flat.reshape(width, width)[:, :, None], 4, axis=2)


class ConstantProblem(BaseProblem):
    """Identification problem on one fixed ``(input, expected)`` pair."""

    kind = "identification"
    evaluation_type = "MINERROR"

    def __init__(
        self,
        input: Array | None = None,
        expected: Array | None = None,
        *,
        seed: int = 0,
        tests_count: int = 1,
        success_threshold: float = 0.05,
    ) -> None:
        self.seed = seed
        self.tests_count = int(tests_count)
        self.success_threshold = float(success_threshold)
        self._input = None if input is None else np.asarray(input, dtype=np.float32)
        self._expected = None if expected is None else np.asarray(expected, dtype=np.float32)

    def init(self, spec: Mapping[str, Any]) -> None:
        rng = np.random.default_rng(self.seed)
        if self._input is None:
            width = int(spec["inputWidth"])
            self._input = rng.uniform(0.0, 1.0, size=(width, width, 4)).astype(np.float32)
        if self._expected is None:
            width = int(spec["outputWidth"])
            self._expected = rng.uniform(0.0, 1.0, size=(width, width, 4)).astype(np.float32)
        self._input_buffer = TensorBuffer.from_array(self._input, name="constant_input").freeze()
        self._expected_buffer = TensorBuffer.from_array(self._expected, name="constant_expected").freeze()

    def _sample(self) -> Sample:
        return Sample(input=self._input_buffer, expected=self._expected_buffer)

    def generate_trainingSample(self, minibatch_index: int) -> Sample:
        return self._sample()

    def generate_testingSample(self, test_index: int) -> Sample:
        return self._sample()

    def get_testsCount(self) -> int:
        return self.tests_count

    def needs_testSubstractExpectedTexture(self) -> bool:
        return True

    def evaluate_test(self, result: Array) -> SampleEvaluation:
        error = identification_error(result)
        return SampleEvaluation(is_consider=True, success=error < self.success_threshold, error=error)

    def get_exportData(self) -> Dict[str, Any]:
        return {"problem": self.kind}


class PatternClassificationProblem(BaseProblem):
    """Classify noisy copies of seeded random class prototypes."""

    kind = "classification"
    evaluation_type = "MAXSUCCESSRATE"

    def __init__(
        self,
        classes_count: int = 4,
        *,
        noise: float = 0.1,
        seed: int = 0,
        tests_count: int = 100,
    ) -> None:
        if classes_count < 2:
            raise ValueError(f"A classification problem needs at least 2 classes, got {classes_count}")
        self.classes_count = int(classes_count)
        self.noise = float(noise)
        self.seed = seed
        self.tests_count = int(tests_count)
        self._rng = np.random.default_rng(seed)
        self._last_test_class = -1

    def init(self, spec: Mapping[str, Any]) -> None:
        self.input_width = int(spec["inputWidth"])
        self.output_width = int(spec["outputWidth"])
        if self.classes_count > self.output_width * self.output_width:
            raise ValueError(
                f"{self.classes_count} classes do not fit a {self.output_width}px output layer"
            )
        prototype_rng = np.random.default_rng(self.seed)
        shape = (self.classes_count, self.input_width, self.input_width, 4)
        self.prototypes = prototype_rng.uniform(0.0, 1.0, size=shape).astype(np.float32)
        mask = classes_mask(self.classes_count, self.output_width)
        self._delta_mask = TensorBuffer.from_array(mask, name="classes_mask").freeze()

    def _sample(self, rng: np.random.Generator, class_index: int) -> Sample:
        values = self.prototypes[class_index] + self.noise * rng.standard_normal(self.prototypes[class_index].shape)
        return Sample(
            input=TensorBuffer.from_array(values.astype(np.float32), name="pattern_input"),
            expected=TensorBuffer.from_array(one_hot_tensor(class_index, self.output_width), name="pattern_expected"),
            delta_mask=self._delta_mask,
            expected_class_index=class_index,
        )

    def generate_trainingSample(self, minibatch_index: int) -> Sample:
        return self._sample(self._rng, int(self._rng.integers(self.classes_count)))

    def generate_testingSample(self, test_index: int) -> Sample:
        rng = np.random.default_rng((self.seed, 1, test_index))
        class_index = test_index % self.classes_count
        self._last_test_class = class_index
        return self._sample(rng, class_index)

    def get_testsCount(self) -> int:
        return self.tests_count

    def evaluate_test(self, result: Array) -> SampleEvaluation:
        scores = np.asarray(result, dtype=np.float64)[: self.classes_count].mean(axis=1)
        predicted = int(np.argmax(scores))
        return SampleEvaluation(is_consider=True, success=predicted == self._last_test_class)

    def get_exportData(self) -> Dict[str, Any]:
        return {"problem": self.kind, "classesCount": self.classes_count}


def _clone_value(value: Any) -> Any:
    if isinstance(value, TensorBuffer):
        return value.clone()
    if isinstance(value, np.ndarray):
        return value.copy()
    return copy.deepcopy(value)


def clone_sample(sample: Sample) -> Sample:
    return Sample(
        input=_clone_value(sample.input),
        expected=_clone_value(sample.expected),
        delta_mask=_clone_value(sample.delta_mask),
        clamp_mask=_clone_value(sample.clamp_mask),
        expected_class_index=sample.expected_class_index,
        infos=dict(sample.infos),
    )


class PooledProblemProvider:
    """Reuse a pool of training samples ``usage_count`` times before regenerating them."""

    def __init__(self, provider: Any, *, size: int = 100, usage_count: int = 10, seed: int = 0) -> None:
        if size <= 0 or usage_count <= 0:
            raise ValueError(f"Pool size and usage count must be positive, got {size} and {usage_count}")
        if hasattr(provider, "compute_deltaMaskFromNNOutput"):
            raise ValueError("Problem pooling does not work with dynamic delta mask computation")
        self.provider = provider
        self.size = int(size)
        self.usage_count = int(usage_count)
        self._rng = np.random.default_rng(seed)
        self._samples: list[Sample | None] = [None] * self.size
        self._usage = [0] * self.size
        self.generated_count = 0

    def init(self, spec: Mapping[str, Any]) -> Any:
        return self.provider.init(spec)

    def generate_trainingSample(self, minibatch_index: int) -> Sample:
        slot = int(self._rng.integers(self.size))
        if self._samples[slot] is None or self._usage[slot] >= self.usage_count:
            self._samples[slot] = clone_sample(self.provider.generate_trainingSample(minibatch_index))
            self._usage[slot] = 0
            self.generated_count += 1
        self._usage[slot] += 1
        return self._samples[slot]

    def generate_testingSample(self, test_index: int) -> Sample:
        return self.provider.generate_testingSample(test_index)

    def get_testsCount(self) -> int:
        return self.provider.get_testsCount()

    def evaluate_test(self, result: Array) -> Any:
        return self.provider.evaluate_test(result)

    def needs_testSubstractExpectedTexture(self) -> bool:
        return bool(self.provider.needs_testSubstractExpectedTexture())

    def get_evaluationType(self) -> str:
        return self.provider.get_evaluationType()

    def get_exportData(self) -> Dict[str, Any]:
        getter = getattr(self.provider, "get_exportData", None)
        return getter() if getter is not None else {}


# ------------------------------------------------------------------
# Registry


_PROBLEMS: Dict[str, Callable[..., Any]] = {
    ConstantProblem.kind: ConstantProblem,
    PatternClassificationProblem.kind: PatternClassificationProblem,
}


def problem_kinds() -> list[str]:
    return sorted(_PROBLEMS)


def build_problem(spec: Mapping[str, Any]) -> Any:
    """Build a provider from ``{"kind": ..., "pool": {...}, **options}``."""

    options = dict(spec)
    kind = options.pop("kind", None)
    if kind not in _PROBLEMS:
        available = ", ".join(problem_kinds())
        raise ValueError(f"Unknown problem kind {kind!r}. Available problems: {available}")
    pool = options.pop("pool", None)
    provider = _PROBLEMS[kind](**options)
    if pool:
        pool_options = dict(pool)
        provider = PooledProblemProvider(
            provider,
            size=int(pool_options.get("size", 100)),
            usage_count=int(pool_options.get("usageCount", 10)),
            seed=int(options.get("seed", 0)),
        )
    return provider


__all__ = [
    "BaseProblem",
    "ConstantProblem",
    "PatternClassificationProblem",
    "PooledProblemProvider",
    "ProblemProvider",
    "build_problem",
    "classes_mask",
    "identification_error",
    "one_hot_tensor",
    "problem_kinds",
]
