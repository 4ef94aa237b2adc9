"""Explicit engine context shared by a network and its trainer."""

from __future__ import annotations

from typing import Dict, Tuple

import numpy as np

from .kernels import Binding, KernelDispatcher, KernelRegistry
from .tensor import TensorBuffer


class TrainerContext:
    """Own the dispatcher, the random generator and the shared constant buffers.

    Components receive the context explicitly. Two contexts never share state, so
    several engines can live in the same process.
    """

    def __init__(self, seed: int | None = 0, registry: KernelRegistry | None = None) -> None:
        self.seed = seed
        self.rng = np.random.default_rng(seed)
        self.dispatcher = KernelDispatcher(registry)
        self._constants: Dict[Tuple[float, int, bool], TensorBuffer] = {}

    @property
    def lost(self) -> bool:
        return self.dispatcher.lost

    def lose(self) -> None:
        """Simulate a GPU context loss. Every later dispatch fails."""

        self.dispatcher.lost = True

    def dispatch(self, binding: Binding) -> TensorBuffer:
        return self.dispatcher.dispatch(binding)

    def run(self, kernel: str, target: TensorBuffer, inputs=None, **uniforms) -> TensorBuffer:
        """Shorthand building the :class:`Binding` for a single dispatch."""

        return self.dispatch(Binding(kernel, target, dict(inputs or {}), uniforms))

    def constant(self, value: float, width: int, *, is_float: bool = True) -> TensorBuffer:
        key = (float(value), int(width), bool(is_float))
        buf = self._constants.get(key)
        if buf is None:
            buf = TensorBuffer.filled(width, value, is_float=is_float, name=f"constant_{value:g}")
            buf.freeze()
            self._constants[key] = buf
        return buf

    def ones(self, width: int) -> TensorBuffer:
        return self.constant(1.0, width)

    def zeros(self, width: int) -> TensorBuffer:
        return self.constant(0.0, width)


__all__ = ["TrainerContext"]
