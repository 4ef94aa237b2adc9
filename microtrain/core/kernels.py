"""Named compute kernels and the dispatcher that runs them.

Every computation on tensor buffers goes through :meth:`KernelDispatcher.dispatch`.
A dispatch receives an explicit :class:`Binding` naming the kernel, its target
buffer, the source buffers bound to each sampler slot and the uniform values.
Nothing is bound implicitly between two dispatches.

Kernel bodies are plain numpy functions ``fn(sources, uniforms, target)`` that
return the full contents of the target buffer.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Sequence

import numpy as np

from . import activations as _activations
from .tensor import CHANNELS, TensorBuffer
from .types import Array

KernelFn = Callable[[Mapping[str, TensorBuffer], Mapping[str, Any], TensorBuffer], Array]


class KernelError(RuntimeError):
    """Base class for dispatch failures."""


class BindingError(KernelError):
    """Raised when a binding descriptor does not match its kernel."""


class UniformError(KernelError, ValueError):
    """Raised when a uniform value is undefined or NaN."""


class ContextLostError(KernelError):
    """Raised when dispatching on a lost compute context."""


@dataclass(frozen=True)
class Kernel:
    """A named kernel program with its sampler slots and required uniforms."""

    name: str
    fn: KernelFn
    samplers: tuple[str, ...] = ()
    uniforms: tuple[str, ...] = ()


@dataclass(frozen=True)
class Binding:
    """Explicit per-dispatch binding of a kernel, its sources and its target."""

    kernel: str
    target: TensorBuffer
    inputs: Mapping[str, TensorBuffer] = field(default_factory=dict)
    uniforms: Mapping[str, Any] = field(default_factory=dict)


class KernelRegistry:
    """Central registry for kernel programs."""

    def __init__(self) -> None:
        self._registry: Dict[str, Kernel] = {}

    def register(
        self,
        name: str,
        fn: KernelFn,
        *,
        samplers: Sequence[str] = (),
        uniforms: Sequence[str] = (),
    ) -> Kernel:
        kernel = Kernel(name, fn, tuple(samplers), tuple(uniforms))
        self._registry[name] = kernel
        return kernel

    def kernel(self, name: str, *, samplers: Sequence[str] = (), uniforms: Sequence[str] = ()):
        """Decorator form of :meth:`register`."""

        def decorator(fn: KernelFn) -> KernelFn:
            self.register(name, fn, samplers=samplers, uniforms=uniforms)
            return fn

        return decorator

    def get(self, name: str) -> Kernel:
        try:
            return self._registry[name]
        except KeyError:
            raise KeyError(f"Unknown kernel: {name}") from None

    def names(self) -> Iterable[str]:
        return sorted(self._registry)

    def __contains__(self, name: str) -> bool:
        return name in self._registry


REGISTRY = KernelRegistry()


def check_uniform(name: str, value: Any) -> None:
    """Reject undefined or NaN uniform values."""

    if value is None:
        raise UniformError(f"Uniform {name!r} is undefined")
    if isinstance(value, (bool, int, np.integer)):
        return
    if isinstance(value, (float, np.floating)):
        if math.isnan(value):
            raise UniformError(f"Uniform {name!r} is NaN")
        return
    if isinstance(value, (list, tuple, np.ndarray)):
        for item in np.asarray(value, dtype=object).reshape(-1):
            check_uniform(name, item)
        return
    raise UniformError(f"Uniform {name!r} has unsupported type {type(value).__name__}")


class KernelDispatcher:
    """Validate binding descriptors and run kernels one at a time."""

    def __init__(self, registry: KernelRegistry | None = None) -> None:
        self.registry = registry or REGISTRY
        self.lost = False
        self.dispatch_count = 0
        self.kernel_counts: Counter[str] = Counter()

    def dispatch(self, binding: Binding) -> TensorBuffer:
        if self.lost:
            raise ContextLostError("The compute context has been lost")
        kernel = self.registry.get(binding.kernel)
        self._validate(kernel, binding)
        result = np.asarray(kernel.fn(binding.inputs, binding.uniforms, binding.target))
        if result.shape != binding.target.shape:
            raise BindingError(
                f"Kernel {kernel.name!r} produced shape {result.shape}, "
                f"target is {binding.target.shape}"
            )
        binding.target.write(result)
        self.dispatch_count += 1
        self.kernel_counts[kernel.name] += 1
        return binding.target

    # ------------------------------------------------------------------
    # Internal helpers

    @staticmethod
    def _validate(kernel: Kernel, binding: Binding) -> None:
        bound = set(binding.inputs)
        expected = set(kernel.samplers)
        if bound != expected:
            missing = ", ".join(sorted(expected - bound)) or "-"
            extra = ", ".join(sorted(bound - expected)) or "-"
            raise BindingError(
                f"Kernel {kernel.name!r} sampler mismatch (missing: {missing}; unexpected: {extra})"
            )
        for name in kernel.uniforms:
            if name not in binding.uniforms:
                raise BindingError(f"Kernel {kernel.name!r} requires uniform {name!r}")
        for name, value in binding.uniforms.items():
            check_uniform(name, value)
        target = binding.target
        if target.released:
            raise BindingError(f"Target {target.name or '<anonymous>'} has been released")
        if target.is_read_only:
            raise BindingError(f"Target {target.name or '<anonymous>'} is read-only")
        for slot, source in binding.inputs.items():
            if source is None:
                raise BindingError(f"Sampler {slot!r} of kernel {kernel.name!r} is unbound")
            if source is target:
                raise BindingError(
                    f"Kernel {kernel.name!r} reads and writes the same buffer through {slot!r}"
                )
            if source.released:
                raise BindingError(f"Sampler {slot!r} is bound to a released buffer")
            if source.semantic != target.semantic:
                raise BindingError(
                    f"Kernel {kernel.name!r} mixes {source.semantic!r} and {target.semantic!r} buffers"
                )


# ------------------------------------------------------------------
# Helpers shared by kernel bodies


def _scatter_add(values: Array, ys: Array, xs: Array, height: int, width: int) -> Array:
    """Sum ``values`` (``(n, 4)``) into a ``(height, width, 4)`` grid."""

    flat = (ys.astype(np.int64) * width + xs.astype(np.int64)).reshape(-1)
    values = values.reshape(-1, CHANNELS)
    out = np.empty((height * width, CHANNELS), dtype=np.float32)
    for channel in range(CHANNELS):
        out[:, channel] = np.bincount(flat, weights=values[:, channel], minlength=height * width)
    return out.reshape(height, width, CHANNELS)


def _connections(src: Mapping[str, TensorBuffer]) -> tuple[Array, Array, Array, Array]:
    raw = src["connections"].view()
    conn = raw.astype(np.int64)
    return conn[..., 0], conn[..., 1], conn[..., 2], conn[..., 3]


def _expand(values: Array, factor: int) -> Array:
    if factor == 1:
        return values
    return np.repeat(np.repeat(values, factor, axis=0), factor, axis=1)


def _block_sum(values: Array, factor: int) -> Array:
    if factor == 1:
        return values
    h, w = values.shape[0] // factor, values.shape[1] // factor
    return values.reshape(h, factor, w, factor, CHANNELS).sum(axis=(1, 3))


def reorganize(values: Array, dims: Sequence[float]) -> Array:
    """Permute an ``a x a`` grid of ``b x b`` blocks into an interleaved layout.

    The pixel at block ``i``, local position ``j`` moves to ``j * a + i`` on each
    axis. Reorganizing with ``(b, a)`` is the inverse permutation.
    """

    a, b = int(round(dims[0])), int(round(dims[1]))
    if a * b != values.shape[0] or values.shape[0] != values.shape[1]:
        raise BindingError(f"Cannot reorganize a {values.shape[0]}px buffer with dims {dims}")
    blocks = values.reshape(a, b, a, b, CHANNELS)
    return blocks.transpose(1, 0, 3, 2, 4).reshape(a * b, a * b, CHANNELS)


def _neighbourhood(values: Array, offsets: Iterable[tuple[int, int, float]], step: int = 1) -> Array:
    out = np.zeros_like(values)
    for dy, dx, coeff in offsets:
        if coeff:
            out += coeff * np.roll(values, shift=(-dy * step, -dx * step), axis=(0, 1))
    return out


def _texel_step(u: Mapping[str, Any], width: int) -> int:
    """Neighbour distance in pixels for a ``ds`` uniform given in texture coordinates."""

    return max(1, int(round(float(u["ds"]) * width)))


_SOBEL_X = [(dy, dx, float(c)) for (dy, dx), c in zip(
    [(-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 0), (0, 1), (1, -1), (1, 0), (1, 1)],
    [-1, 0, 1, -2, 0, 2, -1, 0, 1],
)]
_SOBEL_Y = [(dx, dy, c) for (dy, dx, c) in _SOBEL_X]
_BOX3 = [(dy, dx, 1.0 / 9.0) for dy in (-1, 0, 1) for dx in (-1, 0, 1)]


# ------------------------------------------------------------------
# Copy and arithmetic kernels


@REGISTRY.kernel("copy", samplers=("source",))
def _copy(src, u, target):
    return src["source"].sample(target.width)


@REGISTRY.kernel("copy_scale", samplers=("source",), uniforms=("scale",))
def _copy_scale(src, u, target):
    return src["source"].sample(target.width) * float(u["scale"])


@REGISTRY.kernel("copy_mask_scale", samplers=("source", "mask"), uniforms=("scale",))
def _copy_mask_scale(src, u, target):
    return src["source"].sample(target.width) * src["mask"].sample(target.width) * float(u["scale"])


@REGISTRY.kernel("diff", samplers=("first", "second"))
def _diff(src, u, target):
    return src["first"].sample(target.width) - src["second"].sample(target.width)


@REGISTRY.kernel("clamp_mask", samplers=("source", "mask"), uniforms=("clampRange",))
def _clamp_mask(src, u, target):
    low, high = (float(v) for v in u["clampRange"])
    values = src["source"].sample(target.width)
    mask = src["mask"].sample(target.width) > 0.5
    return np.where(mask, np.clip(values, low, high), values)


@REGISTRY.kernel("reorganize", samplers=("source",), uniforms=("dims",))
def _reorganize(src, u, target):
    return reorganize(src["source"].view(), u["dims"])


def _shift_rgba(mode: int) -> KernelFn:
    def fn(src, u, target):
        shift = -mode if float(u["isInv"]) else mode
        return np.roll(src["source"].sample(target.width), shift, axis=2)

    return fn


for _mode in (1, 2):
    REGISTRY.register(f"shift_rgba{_mode}", _shift_rgba(_mode), samplers=("source",), uniforms=("isInv",))


# ------------------------------------------------------------------
# Input preprocessing kernels


@REGISTRY.kernel("copy_channels", samplers=("source", "mask"))
def _copy_channels(src, u, target):
    return src["source"].sample(target.width) * src["mask"].sample(target.width)


@REGISTRY.kernel("gray_scale", samplers=("source", "mask"))
def _gray_scale(src, u, target):
    values = src["source"].sample(target.width)
    luma = 0.299 * values[..., 0] + 0.587 * values[..., 1] + 0.114 * values[..., 2]
    return np.repeat(luma[..., None], CHANNELS, axis=2) * src["mask"].sample(target.width)


@REGISTRY.kernel("mean_normalization", samplers=("source", "mask"), uniforms=("ds",))
def _mean_normalization(src, u, target):
    values = src["source"].sample(target.width)
    step = _texel_step(u, target.width)
    return (values - _neighbourhood(values, _BOX3, step)) * src["mask"].sample(target.width)


@REGISTRY.kernel("sobel", samplers=("source", "mask"), uniforms=("ds",))
def _sobel(src, u, target):
    values = src["source"].sample(target.width)
    step = _texel_step(u, target.width)
    gx = _neighbourhood(values, _SOBEL_X, step)
    gy = _neighbourhood(values, _SOBEL_Y, step)
    return np.sqrt(gx**2 + gy**2) * src["mask"].sample(target.width)


# ------------------------------------------------------------------
# Max pooling kernels


def _pool_blocks(values: Array, factor: int) -> Array:
    h, w = values.shape[0] // factor, values.shape[1] // factor
    return values.reshape(h, factor, w, factor, CHANNELS)


def _max_pooling(factor: int) -> KernelFn:
    def fn(src, u, target):
        size = int(u["sizePx"])
        values = src["outputs"].sample(size)
        return _pool_blocks(values, factor).max(axis=(1, 3))

    return fn


def _max_pooling_mask(factor: int) -> KernelFn:
    def fn(src, u, target):
        size = int(u["sizePx"])
        values = src["outputs"].sample(size)
        h = size // factor
        blocks = _pool_blocks(values, factor).transpose(0, 2, 4, 1, 3).reshape(h, h, CHANNELS, -1)
        winner = blocks.argmax(axis=3)
        one_hot = (np.arange(factor * factor) == winner[..., None]).astype(np.float32)
        one_hot = one_hot.reshape(h, h, CHANNELS, factor, factor).transpose(0, 3, 1, 4, 2)
        return one_hot.reshape(size, size, CHANNELS)

    return fn


for _factor in (2, 4):
    REGISTRY.register(f"max_pooling{_factor}", _max_pooling(_factor), samplers=("outputs",), uniforms=("sizePx",))
    REGISTRY.register(
        f"max_pooling{_factor}_mask", _max_pooling_mask(_factor), samplers=("outputs",), uniforms=("sizePx",)
    )


# ------------------------------------------------------------------
# Activation kernels


def _activation_kernel(activation: _activations.Activation) -> KernelFn:
    def fn(src, u, target):
        return activation.forward(src["source"].sample(target.width))

    return fn


def _bp_activation_kernel(activation: _activations.Activation) -> KernelFn:
    def fn(src, u, target):
        deltas = src["deltas"].sample(target.width)
        return deltas * activation.derivative(src["inputSummed"].sample(target.width))

    return fn


for _name in _activations.names():
    _act = _activations.get_activation(_name)
    REGISTRY.register(_act.kernel, _activation_kernel(_act), samplers=("source",))
    REGISTRY.register(_act.bp_kernel, _bp_activation_kernel(_act), samplers=("deltas", "inputSummed"))


# ------------------------------------------------------------------
# Output layer deltas


_EPS = 1e-6


@REGISTRY.kernel("bp_quadratic", samplers=("output", "expected", "mask"))
def _bp_quadratic(src, u, target):
    output = src["output"].sample(target.width)
    expected = src["expected"].sample(target.width)
    return (output - expected) * src["mask"].sample(target.width)


@REGISTRY.kernel("bp_cross_entropy", samplers=("output", "expected", "mask"))
def _bp_cross_entropy(src, u, target):
    output = np.clip(src["output"].sample(target.width), _EPS, 1.0 - _EPS)
    expected = src["expected"].sample(target.width)
    grad = (output - expected) / np.maximum(output * (1.0 - output), _EPS)
    return grad * src["mask"].sample(target.width)


# ------------------------------------------------------------------
# Connectivity kernels


@REGISTRY.kernel("weights_direct", samplers=("inputs", "weights", "bias"))
def _weights_direct(src, u, target):
    w = target.width
    return src["inputs"].sample(w) * src["weights"].view() + src["bias"].view()


@REGISTRY.kernel("weights_products", samplers=("inputs", "weights", "connections"))
def _weights_products(src, u, target):
    fx, fy, wx, wy = _connections(src)
    return src["weights"].view()[wy, wx] * src["inputs"].view()[fy, fx]


@REGISTRY.kernel("bias_mipmap", samplers=("source", "bias"), uniforms=("toSparsity2",))
def _bias_mipmap(src, u, target):
    source = src["source"]
    level = int(round(math.log2(source.width // target.width)))
    return source.mipmap(level) * float(u["toSparsity2"]) + src["bias"].view()


@REGISTRY.kernel(
    "sum_weights_indexed",
    samplers=("inputs", "weights", "connections", "bias"),
    uniforms=("toSparsity", "biasClusterSize"),
)
def _sum_weights_indexed(src, u, target):
    fx, fy, wx, wy = _connections(src)
    products = src["weights"].view()[wy, wx] * src["inputs"].view()[fy, fx]
    summed = _block_sum(products, int(u["toSparsity"]))
    return summed + _expand(src["bias"].view(), int(u["biasClusterSize"]))


@REGISTRY.kernel("bp_weights_deltas_direct", samplers=("deltas", "weights"))
def _bp_weights_deltas_direct(src, u, target):
    return src["deltas"].sample(target.width) * src["weights"].view()


@REGISTRY.kernel(
    "bp_weights_deltas_indexed",
    samplers=("deltas", "weights", "connections"),
    uniforms=("toSparsity",),
)
def _bp_weights_deltas_indexed(src, u, target):
    fx, fy, wx, wy = _connections(src)
    deltas = _expand(src["deltas"].view(), int(u["toSparsity"]))
    contributions = src["weights"].view()[wy, wx] * deltas
    return _scatter_add(contributions, fy, fx, target.height, target.width)


# ------------------------------------------------------------------
# Learning kernels


@REGISTRY.kernel("learning_dweights_direct", samplers=("deltas", "inputs"), uniforms=("SGDLearningRate",))
def _learning_dweights_direct(src, u, target):
    w = target.width
    return float(u["SGDLearningRate"]) * src["deltas"].sample(w) * src["inputs"].sample(w)


@REGISTRY.kernel(
    "learning_dweights_indexed",
    samplers=("deltas", "inputs", "connections"),
    uniforms=("SGDLearningRate", "toSparsity"),
)
def _learning_dweights_indexed(src, u, target):
    fx, fy, wx, wy = _connections(src)
    deltas = _expand(src["deltas"].view(), int(u["toSparsity"]))
    grads = float(u["SGDLearningRate"]) * deltas * src["inputs"].view()[fy, fx]
    return _scatter_add(grads, wy, wx, target.height, target.width)


@REGISTRY.kernel("learning_dbias", samplers=("deltas",), uniforms=("SGDLearningRate", "clusterSize"))
def _learning_dbias(src, u, target):
    summed = _block_sum(src["deltas"].view(), int(u["clusterSize"]))
    return float(u["SGDLearningRate"]) * summed


@REGISTRY.kernel("learning_add_momentum", samplers=("dweights", "previous"), uniforms=("SGDMomentum",))
def _learning_add_momentum(src, u, target):
    return src["dweights"].view() + float(u["SGDMomentum"]) * src["previous"].view()


@REGISTRY.kernel("learning_apply_dweights", samplers=("weights", "dweights"), uniforms=("l2Decay",))
def _learning_apply_dweights(src, u, target):
    return src["weights"].view() * (1.0 - float(u["l2Decay"])) - src["dweights"].view()


__all__ = [
    "Binding",
    "BindingError",
    "ContextLostError",
    "Kernel",
    "KernelDispatcher",
    "KernelError",
    "KernelRegistry",
    "REGISTRY",
    "UniformError",
    "check_uniform",
    "reorganize",
]
