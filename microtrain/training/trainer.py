"""Cooperative minibatch training loop and its run-state machine."""

from __future__ import annotations

import math
import time
import warnings
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np

from ..core.context import TrainerContext
from ..core.kernels import ContextLostError
from ..core.tensor import as_tensor
from ..core.types import LearningCurves, SampleEvaluation, TestResult
from ..network.network import Network
from .evaluator import Evaluator
from .losses import REGISTRY as COST_REGISTRY

APP = "WebAR.rocks.train"
VERSION = "1.0.1"


class TrainerState(str, Enum):
    NOT_LOADED = "notLoaded"
    LOADING = "loading"
    RUNNING = "running"
    PAUSE = "pause"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def label(self) -> str:
        return {
            "notLoaded": "NOT_LOADED",
            "loading": "LOADING",
            "running": "RUNNING",
            "pause": "PAUSE",
            "finished": "FINISHED",
            "error": "ERROR",
        }[self.value]


@dataclass
class TrainerOptions:
    """Options recognised by :class:`Trainer` (camelCase keys in mappings)."""

    enable_ui: bool = True
    tests_count: int = 1000
    test_minibatchs_interval: int = 10000
    test_first: bool = False
    minibatch_size: int = 1
    pause_after_n_tests: int = -1
    stop_after_minibatchs_count: int = 0
    delay_between_minibatchs: float = 0.0
    cost: str = "quadratic"
    l2_decay: float | Sequence[float] = 0.0
    sgd_learning_rate: float | Sequence[float] = -1.0
    sgd_learning_rate_factor: float = 0.03
    sgd_momentum: float = 0.0
    sgd_learning_rate_period: float = 0.0
    display: bool = False
    load_timeout: float = 30.0

    _KEYS = {
        "enableUI": "enable_ui",
        "testsCount": "tests_count",
        "testMinibatchsInterval": "test_minibatchs_interval",
        "testFirst": "test_first",
        "minibatchSize": "minibatch_size",
        "pauseAfterNTests": "pause_after_n_tests",
        "stopAfterMinibatchsCount": "stop_after_minibatchs_count",
        "delayBetweenMinibatchs": "delay_between_minibatchs",
        "cost": "cost",
        "l2Decay": "l2_decay",
        "SGDLearningRate": "sgd_learning_rate",
        "SGDLearningRateFactor": "sgd_learning_rate_factor",
        "SGDMomentum": "sgd_momentum",
        "SGDLearningRatePeriod": "sgd_learning_rate_period",
        "display": "display",
        "loadTimeout": "load_timeout",
    }

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | "TrainerOptions" | None) -> "TrainerOptions":
        if isinstance(options, TrainerOptions):
            return options
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (options or {}).items():
            name = cls._KEYS.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown trainer option: {key}")
            values[name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, name) for key, name in self._KEYS.items()}


def decay_factor(minibatch_index: int, period: float) -> float:
    """Half-life learning rate decay: ``1`` at index 0, ``0.5`` at ``period``."""

    if not period or period <= 0:
        return 1.0
    return math.exp(-math.log(2.0) / period * minibatch_index)


def _broadcast(value: float | Sequence[float], count: int, name: str) -> List[float]:
    if isinstance(value, (int, float, np.integer, np.floating)):
        return [float(value)] * count
    values = [float(v) for v in value]
    if len(values) < count:
        raise ValueError(f"{name} needs {count} values (one per neuron layer), got {len(values)}")
    return values[:count]


class Trainer:
    """Drive the minibatch loop: sampling, feedforward, backpropagation, learning, tests.

    The loop is cooperative. ``train()`` and ``resume()`` run minibatches until the
    state leaves ``running``; ``pause()`` called from a callback takes effect before
    the next minibatch. Monitoring callbacks are duck-typed objects exposing any of
    ``on_status``, ``on_minibatch``, ``on_test`` and ``on_best``.
    """

    def __init__(
        self,
        network: Network | None,
        problem: Any,
        options: TrainerOptions | Mapping[str, Any] | None = None,
        *,
        context: TrainerContext | None = None,
        callbacks: Sequence[object] | None = None,
    ) -> None:
        if network is None:
            raise ValueError("You should provide a neural network")
        if problem is None:
            raise ValueError("You should provide a problem")
        self.network = network
        self.problem = problem
        self.options = TrainerOptions.from_mapping(options)
        self.context = context or network.context
        self.callbacks = list(callbacks or [])
        self.cost = COST_REGISTRY.get(self.options.cost)
        if self.options.minibatch_size < 1:
            raise ValueError(f"minibatchSize must be >= 1, got {self.options.minibatch_size}")
        if self.options.test_minibatchs_interval < 1:
            raise ValueError(
                f"testMinibatchsInterval must be >= 1, got {self.options.test_minibatchs_interval}"
            )
        self.display = bool(self.options.display and self.options.enable_ui)
        self.evaluator = Evaluator(problem.get_evaluationType())

        self.state = TrainerState.NOT_LOADED
        self.error_reason = ""
        self.minibatchs = 0
        self.tests = 0
        self.rate_decay = 1.0
        self.learning_curves = LearningCurves()
        self.last_test: TestResult | None = None
        self.best_test: TestResult | None = None
        self.last_cost = float("nan")
        self.speed = 0.0
        self.timestamp_start = 0
        self._prev_speed_state = (-1.0, 0)
        self._rates: List[float] = []
        self._l2_decays: List[float] = []
        self._built = False

    # ------------------------------------------------------------------
    # State machine

    def get_state(self) -> TrainerState:
        return self.state

    def is_running(self) -> bool:
        return self.state is TrainerState.RUNNING

    def is_paused(self) -> bool:
        return self.state is TrainerState.PAUSE

    def train(self) -> bool:
        if self.is_running():
            return False
        if self.resume():
            return True
        if self.state is TrainerState.ERROR:
            return False
        self._set_state(TrainerState.LOADING)
        self.tests = 0
        self.minibatchs = 0
        self.rate_decay = 1.0
        self.learning_curves = LearningCurves()
        self.last_test = None
        self.best_test = None
        self.evaluator.reset()
        self._prev_speed_state = (-1.0, 0)

        layers_count = self.network.get_numberLayers() - 1
        self.set_learningRate(self.options.sgd_learning_rate)
        self.set_l2Decay(self.options.l2_decay)
        if len(self._rates) != layers_count:  # pragma: no cover - guardrail
            raise ValueError("Learning rates do not match the network")
        if not self._built:
            if self.options.sgd_momentum != 0:
                self.network.set_SGDMomentum(self.options.sgd_momentum)
            self.network.build_output()
            self.network.build_backPropagation()
            self._built = True
        self.network.reset_momentum()

        if not self._load_problem():
            return False
        self.timestamp_start = int(time.time() * 1000)
        self._set_state(TrainerState.RUNNING)
        self._loop()
        return True

    def resume(self) -> bool:
        if not self.is_paused():
            return False
        if self._is_stop_reached():
            self._set_state(TrainerState.FINISHED)
            return True
        self._set_state(TrainerState.RUNNING)
        self._loop()
        return True

    def pause(self) -> bool:
        if not self.is_running():
            return False
        self._set_state(TrainerState.PAUSE)
        return True

    def step(self) -> bool:
        """Run exactly one minibatch and leave the trainer paused."""

        if not (self.is_running() or self.is_paused()):
            return False
        if self._is_stop_reached():
            self._set_state(TrainerState.FINISHED)
            return False
        self.state = TrainerState.RUNNING
        self._process_minibatch()
        if self.state is TrainerState.RUNNING:
            self._set_state(TrainerState.PAUSE)
        return True

    def stop(self) -> bool:
        if self.state not in (TrainerState.RUNNING, TrainerState.PAUSE):
            return False
        self._set_state(TrainerState.FINISHED)
        return True

    def fail(self, reason: str = "") -> None:
        """Move to the terminal ``error`` state. The engine must be rebuilt afterwards."""

        self.error_reason = reason
        self._set_state(TrainerState.ERROR)

    # ------------------------------------------------------------------
    # Learning parameters

    def set_learningRate(self, value: float | Sequence[float]) -> None:
        count = self.network.get_numberLayers() - 1
        self._rates = [1.0 if rate <= 0 else rate for rate in _broadcast(value, count, "SGDLearningRate")]

    def set_l2Decay(self, value: float | Sequence[float]) -> None:
        count = self.network.get_numberLayers() - 1
        self._l2_decays = _broadcast(value, count, "l2Decay")

    def applied_rates(self) -> List[float]:
        factor = self.options.sgd_learning_rate_factor * self.rate_decay
        return [rate * factor for rate in self._rates]

    def applied_l2_decays(self) -> List[float]:
        return [l2 * self.rate_decay for l2 in self._l2_decays]

    # ------------------------------------------------------------------
    # Minibatch processing

    def process_sample(self, want_result: bool = False) -> Dict[str, Any]:
        sample = self.problem.generate_trainingSample(self.minibatchs)
        inputs = as_tensor(sample.input, name="sample_input")
        expected = as_tensor(sample.expected, name="sample_expected")
        clamp_mask = None if sample.clamp_mask is None else as_tensor(sample.clamp_mask, is_float=False)
        result = self.network.process_feedforward(inputs, want_result, expected, clamp_mask)
        output = self.network.get_outputTexture()
        if want_result:
            self.last_cost = self.cost(output.read(), expected.sample(output.width))

        delta_mask = sample.delta_mask
        if delta_mask is None and hasattr(self.problem, "compute_deltaMaskFromNNOutput"):
            delta_mask = self.problem.compute_deltaMaskFromNNOutput(output)
        masks = [] if delta_mask is None else [as_tensor(delta_mask, name="delta_mask")]
        self.network.process_backpropagation(expected, masks, self.cost.kernel)
        self.network.process_learning(self.applied_rates(), self.applied_l2_decays())
        return {"result": result, "sample": sample}

    def perform_test(self) -> TestResult:
        """Evaluate the network on a test batch without touching the weights."""

        problem_count = self.problem.get_testsCount()
        trials = self.options.tests_count if problem_count == -1 else int(problem_count)
        substract = bool(self.problem.needs_testSubstractExpectedTexture())
        zero = self.context.zeros(self.network.get_outputWidth())
        result = TestResult(n_trials=trials, minibatchs=self.minibatchs, index=self.tests)
        errors_summed = 0
        for test_index in range(trials):
            sample = self.problem.generate_testingSample(test_index)
            inputs = as_tensor(sample.input, name="test_input")
            expected = as_tensor(sample.expected, name="test_expected") if substract else zero
            clamp_mask = None if sample.clamp_mask is None else as_tensor(sample.clamp_mask, is_float=False)
            # against the zero tensor the residual is the raw output
            raw = self.network.process_feedforward(inputs, True, expected, clamp_mask)
            evaluation = SampleEvaluation.from_mapping(self.problem.evaluate_test(raw))
            if not evaluation.is_consider:
                continue
            result.n_trials_considered += 1
            result.n_success += float(evaluation.success)
            result.n_false_positives += int(bool(evaluation.is_false_positive))
            result.n_false_negatives += int(bool(evaluation.is_false_negative))
            if evaluation.error != float("-inf"):
                result.error += evaluation.error
                result.is_error = True
                errors_summed += 1
        if result.is_error:
            result.error /= errors_summed
        if result.n_trials_considered:
            result.success_rate = result.n_success / result.n_trials_considered
        return result

    # ------------------------------------------------------------------
    # Monitoring

    def get_progress(self) -> float:
        stop = self.options.stop_after_minibatchs_count
        return -1.0 if not stop else self.minibatchs / stop

    def get_iterationsCount(self) -> int:
        return self.minibatchs * self.options.minibatch_size

    def get_infos(self) -> Dict[str, Any]:
        progress = self.get_progress()
        return {
            "state": self.state.label,
            "progressPerCent": -1 if progress == -1 else round(progress * 100.0, 2),
            "speed": round(self.speed, 2),
            "timestampStart": self.timestamp_start,
            "timestampCurrent": int(time.time() * 1000),
            "iterationsCount": self.get_iterationsCount(),
            "minibatchsCount": self.minibatchs,
            "learningCurves": self.learning_curves.to_dict(),
            "lastTestResult": self._test_info(self.last_test),
            "bestTestResult": self._test_info(self.best_test),
            "rateDecay": self.rate_decay,
            "errorReason": self.error_reason,
        }

    def export_toJSON(self, compression: int | Mapping[str, Any] | None = None) -> Dict[str, Any]:
        from ..serialization import compress

        getter = getattr(self.problem, "get_exportData", None)
        if getter is None:
            warnings.warn("Problem provides no export data", RuntimeWarning, stacklevel=2)
            problem_data: Mapping[str, Any] = {}
        else:
            problem_data = getter() or {}
        trainer_data = {
            "trainerApp": APP,
            "trainerVersion": VERSION,
            "trainingInfos": self.get_infos(),
        }
        doc = self.network.export_toJSON(problem_data, trainer_data)
        if compression:
            level = compression["level"] if isinstance(compression, Mapping) else int(compression)
            doc = compress(doc, level)
        return doc

    # ------------------------------------------------------------------
    # Internal helpers

    def _set_state(self, state: TrainerState) -> None:
        self.state = state
        self._emit("on_status", state)

    def _emit(self, name: str, *args: Any) -> None:
        for callback in self.callbacks:
            if hasattr(callback, name):
                getattr(callback, name)(*args)

    def _load_problem(self) -> bool:
        spec = {
            "inputWidth": self.network.get_inputWidth(),
            "outputWidth": self.network.get_outputWidth(),
            "classesCount": self.network.get_classesCount(),
            "network": self.network,
        }
        try:
            pending = self.problem.init(spec)
            if isinstance(pending, Future):
                pending.result(timeout=self.options.load_timeout)
        except FutureTimeoutError:
            self.fail(f"Problem loading timed out after {self.options.load_timeout}s")
            return False
        except Exception as exc:
            self.fail(f"Problem loading failed: {exc}")
            return False
        return True

    def _loop(self) -> None:
        delay = float(self.options.delay_between_minibatchs)
        while self.is_running() and not self._is_stop_reached():
            self._process_minibatch()
            if delay > 0 and self.is_running():
                time.sleep(delay / 1000.0)

    def _process_minibatch(self) -> None:
        try:
            if self.options.sgd_learning_rate_period:
                self.rate_decay = decay_factor(self.minibatchs, self.options.sgd_learning_rate_period)
            size = self.options.minibatch_size
            for index in range(size):
                self.process_sample(want_result=index == size - 1)
            counter = self.minibatchs if self.options.test_first else self.minibatchs + 1
            if counter % self.options.test_minibatchs_interval == 0:
                self._run_test_cycle()
        except ContextLostError as exc:
            self.fail(str(exc))
            return

        self.minibatchs += 1
        self._update_speed()
        self._emit("on_minibatch", self.minibatchs, {"speed": self.speed, "cost": self.last_cost})
        if self._is_stop_reached() and self.state in (TrainerState.RUNNING, TrainerState.PAUSE):
            self._set_state(TrainerState.FINISHED)

    def _is_stop_reached(self) -> bool:
        stop = self.options.stop_after_minibatchs_count
        return bool(stop) and self.minibatchs >= stop

    def _run_test_cycle(self) -> None:
        result = self.perform_test()
        self.learning_curves.append(result)
        self.last_test = result
        self._emit("on_test", self.tests, result)
        evaluation = self.evaluator.is_best_test(result)
        if evaluation.is_best:
            self.best_test = result
            self._emit("on_best", result)
        if self.display:
            print(
                f"[microtrain] test={self.tests} minibatchs={self.minibatchs} "
                f"successRate={result.success_rate:.4f} error={result.error:.6f}"
                f"{' (best)' if evaluation.is_best else ''}"
            )
        if self.options.pause_after_n_tests == self.tests:
            self.pause()
        self.tests += 1

    def _update_speed(self) -> None:
        now = time.perf_counter()
        previous_time, previous_count = self._prev_speed_state
        if previous_time >= 0 and now > previous_time:
            self.speed = (self.minibatchs - previous_count) / (now - previous_time)
        self._prev_speed_state = (now, self.minibatchs)

    @staticmethod
    def _test_info(result: TestResult | None) -> Dict[str, Any]:
        if result is None:
            return {"isValid": False}
        return {
            "isValid": True,
            "index": result.index,
            "error": result.error,
            "successRate": result.success_rate,
        }


__all__ = ["APP", "Trainer", "TrainerOptions", "TrainerState", "VERSION", "decay_factor"]
