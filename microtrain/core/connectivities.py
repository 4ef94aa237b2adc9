"""Connectivity strategies mapping a layer's input grid to its weighted sums.

Each strategy owns its weight buffer (and, for the indexed variants, a buffer of
connection coordinates) and exposes the same capability interface: feedforward,
backpropagation of downstream deltas, and the weight/bias gradients used during
learning. The strategy is chosen once, when the layer is built, from a
:class:`ConnectivityKind`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Type

import numpy as np

from .context import TrainerContext
from .tensor import TensorBuffer, is_pot
from .types import Array


class ConnectivityKind(str, Enum):
    DIRECT = "direct"
    FULL = "full"
    FULL_NPOT = "fullNPoT"
    SQUARE = "square"
    SQUARE_FAST = "squareFast"
    CONV = "conv"

    @classmethod
    def parse(cls, value: "str | ConnectivityKind") -> "ConnectivityKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            available = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown connectivity {value!r}. Available connectivities: {available}") from None

    @property
    def is_dense(self) -> bool:
        return self in (ConnectivityKind.FULL, ConnectivityKind.FULL_NPOT)


@dataclass(frozen=True)
class ConnectivityParams:
    """Sizes shared by every connectivity kind."""

    from_size: int
    to_size: int
    to_sparsity: int
    stride: int = 1
    kernels_count: int = 0
    layer_index: int = -1
    init_to_zero: bool = False
    input_scale: tuple[float, float] = (1.0, 1.0)
    align: int = 1


class Connectivity:
    """Base class of every connectivity strategy."""

    kind: ClassVar[ConnectivityKind]
    should_sum_ff: ClassVar[bool] = False

    def __init__(
        self,
        params: ConnectivityParams,
        context: TrainerContext,
        backup: Mapping[str, Any] | None = None,
    ) -> None:
        self.params = params
        self.context = context
        self._check()
        self.weights = self._init_weights(backup)
        self.updated_weights = TensorBuffer(self.w_size, name="updated_weights")
        self._bp_sum = TensorBuffer(params.from_size, name="bp_weights_deltas_summed")

    # ------------------------------------------------------------------
    # Sizes

    @property
    def w_size(self) -> int:
        return self.params.to_sparsity * self.params.to_size

    @property
    def b_size(self) -> int:
        return self.params.to_size

    @property
    def bias_cluster_size(self) -> int:
        return 1

    def get_toSparsity(self) -> int:
        return self.params.to_sparsity

    def get_fromSparsity(self) -> float:
        return self.w_size / self.params.from_size

    def init_deviation(self) -> float:
        return 1.0 / self.params.to_sparsity

    # ------------------------------------------------------------------
    # Capability interface

    def process_feedforward(self, inputs: TensorBuffer, bias: TensorBuffer, target: TensorBuffer) -> TensorBuffer:
        raise NotImplementedError

    def process_backpropagation(self, deltas: TensorBuffer) -> TensorBuffer:
        raise NotImplementedError

    def process_learningWeights(
        self, deltas: TensorBuffer, inputs: TensorBuffer, rate: float, target: TensorBuffer
    ) -> TensorBuffer:
        raise NotImplementedError

    def process_learningBiases(self, deltas: TensorBuffer, rate: float, target: TensorBuffer) -> TensorBuffer:
        return self.context.run(
            "learning_dbias",
            target,
            {"deltas": deltas},
            SGDLearningRate=rate,
            clusterSize=self.bias_cluster_size,
        )

    def export_params(self) -> Dict[str, Any]:
        return {
            "fromLayerSize": self.params.from_size,
            "toLayerSize": self.params.to_size,
            "toSparsity": self.params.to_sparsity,
        }

    def export_toJSON(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "params": self.export_params(),
            "weights": self.weights.export_toJSON(),
        }

    # ------------------------------------------------------------------
    # Internal helpers

    def _check(self) -> None:
        if self.params.from_size <= 0 or self.params.to_size <= 0:
            raise ValueError(f"{type(self).__name__}: layer sizes must be positive, got {self.params}")

    def _init_weights(self, backup: Mapping[str, Any] | None) -> TensorBuffer:
        if backup is not None:
            weights = TensorBuffer.from_json(backup["weights"], name="weights")
            if weights.width != self.w_size:
                raise ValueError(
                    f"{type(self).__name__}: saved weights are {weights.width}px, expected {self.w_size}px"
                )
            return weights
        if self.params.init_to_zero:
            return TensorBuffer.zeros(self.w_size, name="weights")
        return TensorBuffer.random(
            self.w_size,
            mean=0.0,
            deviation=self.init_deviation(),
            rng=self.context.rng,
            name="weights",
        )


class DirectConnectivity(Connectivity):
    """One-to-one connectivity: each neuron reads the input at its own position."""

    kind = ConnectivityKind.DIRECT

    @property
    def w_size(self) -> int:
        return self.params.to_size

    def get_fromSparsity(self) -> float:
        return 1.0

    def _check(self) -> None:
        super()._check()
        if self.params.from_size != self.params.to_size:
            raise ValueError(
                f"DirectConnectivity: layer sizes must match, got {self.params.from_size} "
                f"and {self.params.to_size}"
            )

    def process_feedforward(self, inputs, bias, target):
        return self.context.run(
            "weights_direct", target, {"inputs": inputs, "weights": self.weights, "bias": bias}
        )

    def process_backpropagation(self, deltas):
        return self.context.run(
            "bp_weights_deltas_direct", self._bp_sum, {"deltas": deltas, "weights": self.weights}
        )

    def process_learningWeights(self, deltas, inputs, rate, target):
        return self.context.run(
            "learning_dweights_direct", target, {"deltas": deltas, "inputs": inputs}, SGDLearningRate=rate
        )


class _IndexedConnectivity(Connectivity):
    """Connectivity described by a buffer of per-connection coordinates.

    The connection buffer has one pixel per connection, tiled by target neuron:
    pixel ``(y, x)`` feeds neuron ``(y // s, x // s)`` where ``s`` is the target
    sparsity. Its channels store ``(from_x, from_y, weight_x, weight_y)``.
    """

    def __init__(self, params, context, backup=None) -> None:
        super().__init__(params, context, backup)
        coords = self._build_connections()
        self.connections = TensorBuffer.from_array(coords.astype(np.float32), name="connections")
        self.connections.freeze()

    @property
    def connections_size(self) -> int:
        return self.params.to_sparsity * self.params.to_size

    def _build_connections(self) -> Array:
        raise NotImplementedError

    def _tile_grid(self) -> tuple[Array, Array, Array, Array]:
        """Return ``(to_y, to_x, patch_y, patch_x)`` for every connection pixel."""

        s = self.params.to_sparsity
        ys, xs = np.indices((self.connections_size, self.connections_size))
        return ys // s, xs // s, ys % s, xs % s

    def process_feedforward(self, inputs, bias, target):
        return self.context.run(
            "sum_weights_indexed",
            target,
            {"inputs": inputs, "weights": self.weights, "connections": self.connections, "bias": bias},
            toSparsity=self.params.to_sparsity,
            biasClusterSize=self.bias_cluster_size,
        )

    def process_backpropagation(self, deltas):
        return self.context.run(
            "bp_weights_deltas_indexed",
            self._bp_sum,
            {"deltas": deltas, "weights": self.weights, "connections": self.connections},
            toSparsity=self.params.to_sparsity,
        )

    def process_learningWeights(self, deltas, inputs, rate, target):
        return self.context.run(
            "learning_dweights_indexed",
            target,
            {"deltas": deltas, "inputs": inputs, "connections": self.connections},
            SGDLearningRate=rate,
            toSparsity=self.params.to_sparsity,
        )


class FullNPoTConnectivity(_IndexedConnectivity):
    """Dense connectivity for layers of any size."""

    kind = ConnectivityKind.FULL_NPOT

    def get_fromSparsity(self) -> float:
        return float(self.params.to_size)

    def init_deviation(self) -> float:
        return 1.0 / self.params.from_size

    def _check(self) -> None:
        super()._check()
        if self.params.to_sparsity != self.params.from_size:
            raise ValueError(
                f"{type(self).__name__}: sparsity must equal the previous layer size "
                f"({self.params.from_size}), got {self.params.to_sparsity}"
            )

    def _build_connections(self) -> Array:
        _, _, patch_y, patch_x = self._tile_grid()
        ys, xs = np.indices(patch_y.shape)
        return np.stack([patch_x, patch_y, xs, ys], axis=-1)


class FullConnectivity(FullNPoTConnectivity):
    """Dense connectivity summed through mip levels; the input side must be a power of two."""

    kind = ConnectivityKind.FULL
    should_sum_ff = True

    def __init__(self, params, context, backup=None) -> None:
        super().__init__(params, context, backup)
        self._products = TensorBuffer(self.connections_size, is_mipmap=True, name="weighted_inputs")

    def _check(self) -> None:
        super()._check()
        if not is_pot(self.params.from_size):
            raise ValueError(
                f"FullConnectivity: the previous layer size ({self.params.from_size}) must be a power "
                "of two, use the 'fullNPoT' connectivity instead"
            )

    def process_feedforward(self, inputs, bias, target):
        self.context.run(
            "weights_products",
            self._products,
            {"inputs": inputs, "weights": self.weights, "connections": self.connections},
        )
        s = self.params.to_sparsity
        return self.context.run(
            "bias_mipmap", target, {"source": self._products, "bias": bias}, toSparsity2=s * s
        )


def _js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


class SquareConnectivity(_IndexedConnectivity):
    """Each target neuron reads a square window centred on its projected position."""

    kind = ConnectivityKind.SQUARE

    def _build_connections(self) -> Array:
        p = self.params
        to_y, to_x, patch_y, patch_x = self._tile_grid()
        ratio = p.from_size / p.to_size
        centres = np.array([_js_round(i * ratio) for i in range(p.to_size)], dtype=np.int64)
        offset = p.to_sparsity // 2
        from_x = (centres[to_x] + patch_x - offset) % p.from_size
        from_y = (centres[to_y] + patch_y - offset) % p.from_size
        ys, xs = np.indices(to_y.shape)
        return np.stack([from_x, from_y, xs, ys], axis=-1)


class SquareFastConnectivity(_IndexedConnectivity):
    """Strided square windows with an odd footprint, optionally shrinking the grid."""

    kind = ConnectivityKind.SQUARE_FAST

    @property
    def shrink_factor(self) -> int:
        return self.params.from_size // self.params.to_size

    def export_params(self) -> Dict[str, Any]:
        params = super().export_params()
        params["stride"] = self.params.stride
        return params

    def _check(self) -> None:
        super()._check()
        p = self.params
        prefix = (
            f"SquareFastConnectivity (fromLayerSize={p.from_size}, toLayerSize={p.to_size}, "
            f"toSparsity={p.to_sparsity})"
        )
        if p.from_size < p.to_size:
            raise ValueError(f"{prefix}: the target layer must not be larger than the source layer")
        if p.from_size % p.to_size:
            raise ValueError(f"{prefix}: the shrink factor must be an integer")
        from_sparsity = p.to_sparsity * p.to_size / p.from_size
        if from_sparsity != int(from_sparsity) or int(from_sparsity) % 2 != 1:
            raise ValueError(f"{prefix}: the from sparsity must be an odd integer, got {from_sparsity:.4f}")
        if p.to_size <= p.stride * (int(from_sparsity) - 1):
            raise ValueError(f"{prefix}: the stride is too large, windows would overlap")

    def _build_connections(self) -> Array:
        p = self.params
        shrink = self.shrink_factor
        from_sparsity = int(self.get_fromSparsity())
        half = (from_sparsity - 1) // 2
        to_y, to_x, tile_y, tile_x = self._tile_grid()
        patch_y, sub_y = tile_y // shrink, tile_y % shrink
        patch_x, sub_x = tile_x // shrink, tile_x % shrink
        from_x = ((to_x + p.stride * (patch_x - half)) * shrink + sub_x) % p.from_size
        from_y = ((to_y + p.stride * (patch_y - half)) * shrink + sub_y) % p.from_size
        ys, xs = np.indices(to_y.shape)
        return np.stack([from_x, from_y, xs, ys], axis=-1)


class ConvConnectivity(_IndexedConnectivity):
    """A bank of ``kernelsCount**2`` kernels with weights shared across positions.

    The target layer is a ``kernelsCount x kernelsCount`` grid of clusters; the
    cluster of kernel ``k`` holds that kernel's feature map. Biases are stored per
    kernel and added by the convolution itself.
    """

    kind = ConnectivityKind.CONV

    @property
    def kernels_count(self) -> int:
        return self.params.kernels_count

    @property
    def w_size(self) -> int:
        return self.kernels_count * self.params.to_sparsity

    @property
    def b_size(self) -> int:
        return self.kernels_count

    @property
    def bias_cluster_size(self) -> int:
        return self.params.to_size // self.kernels_count

    @property
    def stride(self) -> int:
        return self.kernels_count * self.params.from_size // self.params.to_size

    def get_fromSparsity(self) -> float:
        return self.params.to_sparsity * self.params.to_size / self.params.from_size

    def export_params(self) -> Dict[str, Any]:
        params = super().export_params()
        params.update(
            {
                "kernelsCount": self.kernels_count,
                "inputScale": list(self.params.input_scale),
                "layerIndex": self.params.layer_index,
                "align": self.params.align,
            }
        )
        return params

    def _check(self) -> None:
        super()._check()
        p = self.params
        if p.kernels_count <= 0:
            raise ValueError(f"ConvConnectivity: kernelsCount must be positive, got {p.kernels_count}")
        if p.to_size % p.kernels_count:
            raise ValueError(
                f"ConvConnectivity: the layer size ({p.to_size}) must be a multiple of kernelsCount "
                f"({p.kernels_count})"
            )
        stride = p.kernels_count * p.from_size / p.to_size
        if stride != int(stride):
            raise ValueError(f"ConvConnectivity: stride should be an integer, got {stride}")
        from_cluster = self.get_fromSparsity() / p.kernels_count
        if p.layer_index != 1 and from_cluster != int(from_cluster):
            raise ValueError(
                f"ConvConnectivity: fromKernelClusterSize should be an integer, got {from_cluster}"
            )

    def _build_connections(self) -> Array:
        p = self.params
        s = p.to_sparsity
        cluster = self.bias_cluster_size
        stride = self.stride
        to_y, to_x, patch_y, patch_x = self._tile_grid()
        kernel_y, local_y = to_y // cluster, to_y % cluster
        kernel_x, local_x = to_x // cluster, to_x % cluster
        align = max(1, p.align)
        offset = (max(0, s - stride) // 2 // align) * align
        from_x = (local_x * stride + patch_x - offset) % p.from_size
        from_y = (local_y * stride + patch_y - offset) % p.from_size
        weight_x = kernel_x * s + patch_x
        weight_y = kernel_y * s + patch_y
        return np.stack([from_x, from_y, weight_x, weight_y], axis=-1)


_KINDS: Dict[ConnectivityKind, Type[Connectivity]] = {
    ConnectivityKind.DIRECT: DirectConnectivity,
    ConnectivityKind.FULL: FullConnectivity,
    ConnectivityKind.FULL_NPOT: FullNPoTConnectivity,
    ConnectivityKind.SQUARE: SquareConnectivity,
    ConnectivityKind.SQUARE_FAST: SquareFastConnectivity,
    ConnectivityKind.CONV: ConvConnectivity,
}


def build_connectivity(
    kind: "ConnectivityKind | str",
    params: ConnectivityParams,
    context: TrainerContext,
    backup: Mapping[str, Any] | None = None,
) -> Connectivity:
    """Instantiate the strategy for ``kind``."""

    kind = ConnectivityKind.parse(kind)
    if backup is not None and backup.get("kind", kind.value) != kind.value:
        raise ValueError(f"Saved connectivity is {backup.get('kind')!r}, layer expects {kind.value!r}")
    return _KINDS[kind](params, context, backup)


__all__ = [
    "Connectivity",
    "ConnectivityKind",
    "ConnectivityParams",
    "ConvConnectivity",
    "DirectConnectivity",
    "FullConnectivity",
    "FullNPoTConnectivity",
    "SquareConnectivity",
    "SquareFastConnectivity",
    "build_connectivity",
]
