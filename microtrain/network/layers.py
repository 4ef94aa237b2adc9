"""Input and neuron layers.

Layers never hold references to their neighbours. The owning
:class:`~microtrain.network.network.Network` links them with plain values
(``link`` and ``set_next``) and hands the downstream layer to
:meth:`NeuronLayer.process_backpropagation` explicitly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Sequence

import numpy as np

from ..core.activations import get_activation
from ..core.connectivities import ConnectivityKind, ConnectivityParams, build_connectivity
from ..core.context import TrainerContext
from ..core.tensor import TensorBuffer, as_tensor
from ..core.types import Array
from .maxpooling import MaxPooling

CLAMP_MODES = ("none", "all", "mask")
SHIFT_RGBA_MODES = (0, 1, 2)

_PREPROCESSING_KERNELS = {
    "none": "copy_channels",
    "direct": "copy_channels",
    "copyChannels": "copy_channels",
    "copy": "copy",
    "grayScale": "gray_scale",
    "meanNormalization": "mean_normalization",
    "sobel": "sobel",
}
_PREPROCESSING_WITH_DS = ("meanNormalization", "sobel")


class InputLayer:
    """First layer of a network: preprocesses and masks the raw input tensor."""

    index = 0
    kernels_count = 0

    def __init__(
        self,
        size: int,
        context: TrainerContext,
        *,
        preprocessing: str = "none",
        mask: Array | Sequence | None = None,
    ) -> None:
        if preprocessing not in _PREPROCESSING_KERNELS:
            raise ValueError(f"Unknown preprocessing for input layer: {preprocessing}")
        if int(size) <= 0:
            raise ValueError(f"Input layer size must be positive, got {size}")
        self.size = int(size)
        self.context = context
        self.preprocessing = preprocessing
        self._mask_values = None if mask is None else np.asarray(mask, dtype=np.float32)
        if self._mask_values is None:
            self.mask = context.ones(self.size)
        else:
            self.mask = as_tensor(self._mask_values, is_float=False, name="input_mask")
        self.output = TensorBuffer(self.size, name="input_output")

    @classmethod
    def from_mapping(cls, spec: Mapping[str, Any], context: TrainerContext) -> "InputLayer":
        return cls(
            int(spec["size"]),
            context,
            preprocessing=spec.get("preprocessing", "none"),
            mask=spec.get("mask"),
        )

    @property
    def output_size(self) -> int:
        return self.size

    def get_width(self) -> int:
        return self.size

    def get_outputSize(self) -> int:
        return self.size

    def get_output(self) -> TensorBuffer:
        return self.output

    def process_feedforward(self, inputs: TensorBuffer) -> TensorBuffer:
        kernel = _PREPROCESSING_KERNELS[self.preprocessing]
        sources: Dict[str, TensorBuffer] = {"source": inputs}
        uniforms: Dict[str, Any] = {}
        if kernel != "copy":
            sources["mask"] = self.mask
        if self.preprocessing in _PREPROCESSING_WITH_DS:
            uniforms["ds"] = 1.0 / self.size
        return self.context.run(kernel, self.output, sources, **uniforms)

    def export_toJSON(self) -> Dict[str, Any]:
        return {
            "kind": "input",
            "type": "input",
            "index": self.index,
            "size": self.size,
            "preprocessing": self.preprocessing,
            "mask": None if self._mask_values is None else self._mask_values.tolist(),
        }


@dataclass
class LayerSpec:
    """User facing description of a neuron layer.

    Keys of :meth:`from_mapping` follow the camelCase names used in network
    documents (``connectivityUp``, ``kernelsCount``...).
    """

    size: int = -1
    activation: str = "copy"
    connectivity_up: str = "direct"
    stride: int = 1
    kernels_count: int = 0
    sparsity: int | None = None
    max_pooling: Any = None
    decay_bias: bool = False
    init_to_zero: bool = False
    clamp_output: str = "none"
    clamp_output_range: tuple[float, float] = (-1.0, 1.0)
    normalize: bool = False
    classes_count: int = 0
    shift_rgba_mode: int = 0
    input_scale: tuple[float, float] = field(default=(1.0, 1.0))

    _ALIASES = {
        "connectivityUp": "connectivity_up",
        "kernelsCount": "kernels_count",
        "maxPooling": "max_pooling",
        "decayBias": "decay_bias",
        "initToZero": "init_to_zero",
        "clampOutput": "clamp_output",
        "clampOutputRange": "clamp_output_range",
        "classesCount": "classes_count",
        "shiftRGBAMode": "shift_rgba_mode",
        "inputScale": "input_scale",
    }
    _SQRT_KEYS = {"sizeSqrt": "size", "kernelsCountSqrt": "kernels_count", "sparsitySqrt": "sparsity"}

    @classmethod
    def from_mapping(cls, spec: Mapping[str, Any] | "LayerSpec") -> "LayerSpec":
        if isinstance(spec, LayerSpec):
            return spec
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in spec.items():
            name = cls._ALIASES.get(key) or cls._SQRT_KEYS.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown layer option: {key}")
            values[name] = value
        if isinstance(values.get("max_pooling"), Mapping) and "sizeSqrt" in values["max_pooling"]:
            values["max_pooling"] = values["max_pooling"]["sizeSqrt"]
        for key in ("clamp_output_range", "input_scale"):
            if key in values:
                values[key] = tuple(float(v) for v in values[key])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        reverse = {v: k for k, v in self._ALIASES.items()}
        payload = {}
        for f in fields(self):
            value = getattr(self, f.name)
            payload[reverse.get(f.name, f.name)] = list(value) if isinstance(value, tuple) else value
        return payload


class NeuronLayer:
    """Hidden or output layer: connectivity, bias, activation and learning state."""

    def __init__(
        self,
        spec: LayerSpec | Mapping[str, Any],
        index: int,
        context: TrainerContext,
        *,
        is_output: bool = False,
        backup: Mapping[str, Any] | None = None,
    ) -> None:
        self.spec = LayerSpec.from_mapping(spec)
        self.index = int(index)
        self.context = context
        self.is_output = bool(is_output)
        self._backup = backup

        self.activation = get_activation(self.spec.activation)
        self.kind = ConnectivityKind.parse(self.spec.connectivity_up)
        if self.spec.clamp_output not in CLAMP_MODES:
            raise ValueError(f"Unknown clampOutput mode: {self.spec.clamp_output}")
        if self.spec.shift_rgba_mode not in SHIFT_RGBA_MODES:
            raise ValueError(f"Unknown shiftRGBAMode: {self.spec.shift_rgba_mode}")

        self.normalize = bool(self.spec.normalize)
        self.size = int(self.spec.size)
        self.clamp_range = tuple(self.spec.clamp_output_range)
        if self.spec.classes_count:
            self.normalize = True
            self.size = 2 ** math.ceil(math.log2(math.sqrt(self.spec.classes_count)))
            self.clamp_range = (0.0, 1.0)
        if self.size <= 0:
            raise ValueError(f"Layer {self.index}: size must be positive, got {self.size}")

        self.max_pooling = MaxPooling.from_spec(self.spec.max_pooling, self.size, context)
        self.output_size = self.max_pooling.output_size if self.max_pooling else self.size
        self.sparsity = 1 if self.spec.sparsity is None else int(self.spec.sparsity)
        self.is_reorganize = False
        self.connectivity = None
        self.previous_output_size = -1

        self._momentum = 0.0
        self._counter_momentum = 0
        self._input: TensorBuffer | None = None
        self._summed: TensorBuffer | None = None
        self._output: TensorBuffer | None = None
        self._bp_deltas: TensorBuffer | None = None

        self.input_summed = TensorBuffer(self.size, name="input_summed")
        self.input_summed_shifted = TensorBuffer(self.size, name="input_summed_shifted") if self.is_shift_rgba else None
        self.output = TensorBuffer(self.size, name="output")

    # ------------------------------------------------------------------
    # Getters

    @property
    def kernels_count(self) -> int:
        return int(self.spec.kernels_count) if self.is_conv else 0

    @property
    def is_conv(self) -> bool:
        return self.kind is ConnectivityKind.CONV

    @property
    def is_full(self) -> bool:
        return self.kind is ConnectivityKind.FULL

    @property
    def is_shift_rgba(self) -> bool:
        return self.spec.shift_rgba_mode != 0

    @property
    def should_clamp_output(self) -> bool:
        return self.spec.clamp_output != "none"

    @property
    def classes_count(self) -> int:
        return int(self.spec.classes_count)

    def get_width(self) -> int:
        return self.size

    def get_outputSize(self) -> int:
        return self.output_size

    def get_connectivity(self):
        return self.connectivity

    def get_output(self) -> TensorBuffer | None:
        return self._output

    def get_bpDeltas(self) -> TensorBuffer | None:
        return self._bp_deltas

    # ------------------------------------------------------------------
    # Linking

    def link(self, previous_output_size: int, previous_kernels_count: int = 0) -> None:
        """Build the connectivity from the previous layer's output size."""

        self.previous_output_size = int(previous_output_size)
        if self.kind.is_dense:
            self.sparsity = self.previous_output_size
        elif self.kind is ConnectivityKind.DIRECT:
            self.sparsity = 1
        elif self.spec.classes_count and self.spec.sparsity is None:
            self.sparsity = self.previous_output_size

        if self.is_conv and previous_kernels_count and self.sparsity % previous_kernels_count:
            raise ValueError(
                f"Layer {self.index}: the sparsity should be an integer multiple of the previous layer "
                f"kernelsCount (sparsity={self.sparsity}, previous kernelsCount={previous_kernels_count})"
            )

        params = ConnectivityParams(
            from_size=self.previous_output_size,
            to_size=self.size,
            to_sparsity=self.sparsity,
            stride=int(self.spec.stride),
            kernels_count=int(self.spec.kernels_count) if self.is_conv else 0,
            layer_index=self.index,
            init_to_zero=bool(self.spec.init_to_zero),
            input_scale=tuple(self.spec.input_scale),
            align=max(1, int(previous_kernels_count)),
        )
        backup = self._backup
        self.connectivity = build_connectivity(
            self.kind, params, self.context, None if backup is None else backup["connectivity"]
        )
        w_size, b_size = self.connectivity.w_size, self.connectivity.b_size

        if backup is not None:
            self.bias = TensorBuffer.from_json(backup["bias"], name="bias")
            if self.bias.width != b_size:
                raise ValueError(f"Layer {self.index}: saved bias is {self.bias.width}px, expected {b_size}px")
        else:
            self.bias = TensorBuffer(b_size, name="bias")
        self.updated_bias = TensorBuffer(b_size, name="updated_bias")
        self.dweights = TensorBuffer(w_size, name="dweights")
        self.previous_dweights = TensorBuffer(w_size, name="previous_dweights")
        self.dbias = TensorBuffer(b_size, name="dbias")
        self.dweights_copy = None
        self.dbias_copy = None
        self.previous_dbias = None

    def set_next(self, next_kind: "ConnectivityKind | str | None") -> None:
        """Record the downstream connectivity kind. A conv layer is reorganized unless it feeds ``full``."""

        if next_kind is not None:
            next_kind = ConnectivityKind.parse(next_kind)
        self.is_reorganize = self.is_conv and next_kind is not None and next_kind is not ConnectivityKind.FULL
        if self.is_reorganize:
            self.output_reorganized = TensorBuffer(self.output_size, name="output_reorganized")
            self.bp_sum_reorganized = TensorBuffer(self.output_size, name="bp_sum_reorganized")

    def setup_output(self) -> None:
        """Allocate the output-layer-only buffers."""

        self.is_output = True
        self.output_diff_expected = TensorBuffer(self.size, name="output_diff_expected")
        self.output_clamped = TensorBuffer(self.size, name="output_clamped") if self.should_clamp_output else None
        self.output_normalized = TensorBuffer(self.size, name="output_normalized") if self.normalize else None

    def build_backPropagation(self) -> None:
        self.bp_deltas_raw = TensorBuffer(self.size, name="bp_deltas_raw")
        self.bp_deltas_shifted = TensorBuffer(self.size, name="bp_deltas_shifted") if self.is_shift_rgba else None
        self.bp_deltas_masked = TensorBuffer(self.size, name="bp_deltas_masked")
        self.learning_deltas = TensorBuffer(self.size, name="learning_deltas")
        self.delta0 = TensorBuffer(self.size, name="delta0") if self.is_output else None

    def set_SGDMomentum(self, momentum: float) -> None:
        self._momentum = float(momentum)
        if self._momentum == 0:
            return
        w_size, b_size = self.connectivity.w_size, self.connectivity.b_size
        self.dweights_copy = TensorBuffer(w_size, name="dweights_copy")
        self.dbias_copy = TensorBuffer(b_size, name="dbias_copy")
        self.previous_dbias = TensorBuffer(b_size, name="previous_dbias")

    def reset_momentum(self) -> None:
        """Forget the previous updates so the next learning step carries no momentum."""

        self._counter_momentum = 0
        self.previous_dweights.fill(0.0)
        if self.previous_dbias is not None:
            self.previous_dbias.fill(0.0)

    # ------------------------------------------------------------------
    # Feedforward

    def process_feedforward(
        self,
        inputs: TensorBuffer,
        want_result: bool = False,
        expected: TensorBuffer | None = None,
        clamp_mask: TensorBuffer | None = None,
    ) -> TensorBuffer | Array:
        run = self.context.run
        self._input = inputs
        summed = self.connectivity.process_feedforward(inputs, self.bias, self.input_summed)
        if self.is_shift_rgba:
            summed = run(
                f"shift_rgba{self.spec.shift_rgba_mode}", self.input_summed_shifted, {"source": summed}, isInv=0.0
            )
        self._summed = summed
        output = run(self.activation.kernel, self.output, {"source": summed})

        if not self.is_output:
            if self.max_pooling is not None:
                output = self.max_pooling.process_feedforward(output)
            if self.is_reorganize:
                output = run(
                    "reorganize",
                    self.output_reorganized,
                    {"source": output},
                    dims=[self.kernels_count, self.output_size / self.kernels_count],
                )
            self._output = output
            return output

        if self.should_clamp_output:
            mask = clamp_mask if (clamp_mask is not None and self.spec.clamp_output == "mask") else None
            output = run(
                "clamp_mask",
                self.output_clamped,
                {"source": output, "mask": mask if mask is not None else self.context.ones(self.size)},
                clampRange=list(self.clamp_range),
            )
        if self.normalize:
            output = run("copy_scale", self.output_normalized, {"source": output}, scale=1.0 / self.size)
        self._output = output

        if want_result:
            if expected is None:
                raise ValueError("An expected tensor is required to compute the output result")
            run("diff", self.output_diff_expected, {"first": output, "second": expected})
            return self.process_result(self.output_diff_expected)
        return output

    def process_result(self, buffer: TensorBuffer) -> Array:
        """Return one RGBA row per output, row-major from the top-left pixel."""

        count = self.classes_count or self.size * self.size
        return buffer.read().reshape(-1, 4)[:count].copy()

    # ------------------------------------------------------------------
    # Backpropagation

    def process_backpropagation(
        self,
        expected: TensorBuffer | None,
        delta_mask: TensorBuffer | None,
        cost_kernel: str,
        downstream: "NeuronLayer | None" = None,
    ) -> TensorBuffer:
        run = self.context.run
        if self.is_output:
            mask = delta_mask if delta_mask is not None else self.context.ones(self.size)
            deltas = run(cost_kernel, self.delta0, {"output": self._output, "expected": expected, "mask": mask})
        else:
            if downstream is None:
                raise ValueError(f"Layer {self.index}: hidden layers need their downstream layer")
            deltas = downstream.connectivity.process_backpropagation(downstream.get_bpDeltas())
            if self.is_reorganize:
                deltas = run(
                    "reorganize",
                    self.bp_sum_reorganized,
                    {"source": deltas},
                    dims=[self.output_size / self.kernels_count, self.kernels_count],
                )

        # upsampling through the activation kernel undoes max pooling
        deltas = run(self.activation.bp_kernel, self.bp_deltas_raw, {"deltas": deltas, "inputSummed": self._summed})
        if self.is_shift_rgba:
            deltas = run(f"shift_rgba{self.spec.shift_rgba_mode}", self.bp_deltas_shifted, {"source": deltas}, isInv=1.0)

        if delta_mask is None and self.max_pooling is not None:
            delta_mask = self.max_pooling.get_outputMaskTexture()
        if delta_mask is not None:
            deltas = run("copy_mask_scale", self.bp_deltas_masked, {"source": deltas, "mask": delta_mask}, scale=1.0)
        self._bp_deltas = deltas
        return deltas

    # ------------------------------------------------------------------
    # Learning

    def process_learning(self, rate: float, l2_decay: float, learning_mask: TensorBuffer | None = None) -> None:
        run = self.context.run
        conn = self.connectivity
        deltas = self._bp_deltas
        if learning_mask is not None:
            deltas = run("copy_mask_scale", self.learning_deltas, {"source": deltas, "mask": learning_mask}, scale=1.0)

        conn.process_learningWeights(deltas, self._input, rate, self.dweights)
        dweights = self._with_momentum(self.dweights, self.previous_dweights, self.dweights_copy)
        run("learning_apply_dweights", conn.updated_weights, {"weights": conn.weights, "dweights": dweights}, l2Decay=l2_decay)
        run("copy", self.previous_dweights, {"source": dweights})

        conn.process_learningBiases(deltas, rate, self.dbias)
        dbias = self._with_momentum(self.dbias, self.previous_dbias, self.dbias_copy)
        if self._momentum != 0:
            run("copy", self.previous_dbias, {"source": dbias})
        run(
            "learning_apply_dweights",
            self.updated_bias,
            {"weights": self.bias, "dweights": dbias},
            l2Decay=l2_decay if self.spec.decay_bias else 0.0,
        )

        if self._momentum != 0:
            self._counter_momentum += 1

        run("copy", conn.weights, {"source": conn.updated_weights})
        run("copy", self.bias, {"source": self.updated_bias})

    def _with_momentum(
        self, current: TensorBuffer, previous: TensorBuffer | None, target: TensorBuffer | None
    ) -> TensorBuffer:
        if self._momentum == 0:
            return current
        if self._counter_momentum > 0:
            return self.context.run(
                "learning_add_momentum",
                target,
                {"dweights": current, "previous": previous},
                SGDMomentum=self._momentum,
            )
        return self.context.run("copy", target, {"source": current})

    # ------------------------------------------------------------------
    # Export

    def export_toJSON(self) -> Dict[str, Any]:
        return {
            "kind": "neuron",
            "index": self.index,
            "size": self.size,
            "sparsity": self.sparsity,
            "activation": self.spec.activation,
            "connectivityUp": self.kind.value,
            "connectivity": self.connectivity.export_toJSON(),
            "bias": self.bias.export_toJSON(),
            "classesCount": self.classes_count,
            "normalize": self.normalize,
            "kernelsCount": int(self.spec.kernels_count),
            "maxPooling": self.max_pooling.export_toJSON() if self.max_pooling else False,
            "isReorganize": self.is_reorganize,
            "shiftRGBAMode": self.spec.shift_rgba_mode,
            "stride": int(self.spec.stride),
            "decayBias": bool(self.spec.decay_bias),
            "clampOutput": self.spec.clamp_output,
            "clampOutputRange": list(self.spec.clamp_output_range),
            "inputScale": list(self.spec.input_scale),
        }


# Keys of a neuron layer export that describe state rather than configuration.
EXPORT_ONLY_KEYS = ("kind", "type", "index", "connectivity", "bias", "isReorganize")


def spec_from_export(record: Mapping[str, Any]) -> LayerSpec:
    """Rebuild the :class:`LayerSpec` of an exported neuron layer."""

    payload = {k: v for k, v in record.items() if k not in EXPORT_ONLY_KEYS}
    if not payload.get("maxPooling"):
        payload["maxPooling"] = None
    return LayerSpec.from_mapping(payload)


__all__ = [
    "CLAMP_MODES",
    "EXPORT_ONLY_KEYS",
    "InputLayer",
    "LayerSpec",
    "NeuronLayer",
    "spec_from_export",
]
