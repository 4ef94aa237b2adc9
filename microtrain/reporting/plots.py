"""Headless-safe learning curve plots."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Mapping, Tuple


class PlotAdapter:
    """Trainer callback drawing the training cost and the test curves on close.

    Best tests reported through ``on_best`` are marked on the test panels.
    """

    def __init__(self, run_dir: str | Path, enable_plots: bool = False):
        self.enable_plots = enable_plots
        self.run_dir = Path(run_dir)
        self._costs: List[Tuple[int, float]] = []
        self._tests: List[Tuple[int, float, float]] = []
        self._best: List[Tuple[int, float, float]] = []
        if self.enable_plots:
            self.run_dir.mkdir(parents=True, exist_ok=True)

    @property
    def plot_path(self) -> Path:
        return self.run_dir / "learning_curves.png"

    @staticmethod
    def _point(result: Any) -> Tuple[int, float, float]:
        return int(result.minibatchs), float(result.success_rate), float(result.error)

    def on_minibatch(self, count: int, infos: Mapping[str, Any]) -> None:
        if self.enable_plots and infos.get("cost") is not None:
            self._costs.append((int(count), float(infos["cost"])))

    def on_test(self, index: int, result: Any) -> None:
        if self.enable_plots:
            self._tests.append(self._point(result))

    def on_best(self, result: Any) -> None:
        if self.enable_plots:
            self._best.append(self._point(result))

    def close(self) -> None:
        if not self.enable_plots or not (self._tests or self._costs):
            return
        import matplotlib

        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # imported lazily for headless safety

        fig, (ax_cost, ax_rate, ax_error) = plt.subplots(3, 1, sharex=True, figsize=(6, 8))
        if self._costs:
            steps, costs = zip(*self._costs)
            ax_cost.plot(steps, costs, linewidth=0.8)
        ax_cost.set_ylabel("Training cost")
        ax_cost.set_title("Learning curves")
        if self._tests:
            steps, rates, errors = zip(*self._tests)
            ax_rate.plot(steps, rates)
            ax_error.plot(steps, errors)
        if self._best:
            steps, rates, errors = zip(*self._best)
            ax_rate.scatter(steps, rates, marker="*", color="tab:red", zorder=3)
            ax_error.scatter(steps, errors, marker="*", color="tab:red", zorder=3)
        ax_rate.set_ylabel("Success rate")
        ax_error.set_ylabel("Error")
        ax_error.set_xlabel("Minibatchs")
        fig.tight_layout()
        fig.savefig(self.plot_path)
        plt.close(fig)

    __call__ = on_test


__all__ = ["PlotAdapter"]
