"""Max pooling applied to a hidden layer's activated output."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from ..core.context import TrainerContext
from ..core.tensor import TensorBuffer

POOLING_SIZES = (2, 4)


class MaxPooling:
    """Block maximum over ``size x size`` windows plus the matching arg-max mask.

    The mask is a byte buffer at the layer's full size holding 1 where the block
    maximum was found. It gates backpropagated deltas so only the winning unit of
    each block learns.
    """

    def __init__(self, size: int, layer_size: int, context: TrainerContext) -> None:
        size = int(size)
        if size not in POOLING_SIZES:
            raise ValueError(f"Unsupported max pooling size {size}; expected one of {POOLING_SIZES}")
        if layer_size % size:
            raise ValueError(f"Layer size {layer_size} is not a multiple of the max pooling size {size}")
        self.size = size
        self.layer_size = int(layer_size)
        self.context = context
        self.output = TensorBuffer(self.output_size, name="max_pooled")
        self.mask = TensorBuffer(self.layer_size, is_float=False, name="max_pooling_mask")

    @classmethod
    def from_spec(cls, spec: Any, layer_size: int, context: TrainerContext) -> "MaxPooling | None":
        """Accept ``None``/``False``, a bare size or a ``{"size": n}`` mapping."""

        if not spec:
            return None
        if isinstance(spec, Mapping):
            spec = spec["size"]
        return cls(int(spec), layer_size, context)

    @property
    def output_size(self) -> int:
        return self.layer_size // self.size

    def process_feedforward(self, outputs: TensorBuffer) -> TensorBuffer:
        self.context.run(f"max_pooling{self.size}_mask", self.mask, {"outputs": outputs}, sizePx=self.layer_size)
        return self.context.run(f"max_pooling{self.size}", self.output, {"outputs": outputs}, sizePx=self.layer_size)

    def get_outputMaskTexture(self) -> TensorBuffer:
        return self.mask

    def export_toJSON(self) -> Dict[str, Any]:
        return {"size": self.size}


__all__ = ["MaxPooling", "POOLING_SIZES"]
