"""Core numerical primitives for microtrain."""

from . import activations, connectivities, context, kernels, quant, tensor, types

__all__ = ["activations", "connectivities", "context", "kernels", "quant", "tensor", "types"]
