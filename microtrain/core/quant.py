"""Uniform quantisation helpers used by compressed exports."""

from __future__ import annotations

from typing import Any, Dict, Mapping

import numpy as np

from .types import Array

MIN_BITS = 1
MAX_BITS = 16
DEFAULT_BITS = 8


def check_bits(bits: int) -> int:
    bits = int(bits)
    if not MIN_BITS <= bits <= MAX_BITS:
        raise ValueError(f"Quantisation level must be in [{MIN_BITS}, {MAX_BITS}], got {bits}")
    return bits


def quantize(values: Array, bits: int = DEFAULT_BITS) -> Dict[str, Any]:
    """Quantise ``values`` onto ``2**bits`` evenly spaced levels over their range."""

    bits = check_bits(bits)
    flat = np.asarray(values, dtype=np.float32).reshape(-1)
    if flat.size == 0:
        return {"bits": bits, "min": 0.0, "max": 0.0, "data": []}
    low, high = float(flat.min()), float(flat.max())
    levels = (1 << bits) - 1
    span = high - low
    if span == 0.0:
        codes = np.zeros(flat.shape, dtype=np.int64)
    else:
        codes = np.rint((flat.astype(np.float64) - low) / span * levels).astype(np.int64)
    return {"bits": bits, "min": low, "max": high, "data": codes.tolist()}


def dequantize(payload: Mapping[str, Any]) -> Array:
    """Inverse of :func:`quantize`; returns a flat ``float32`` array."""

    bits = check_bits(payload["bits"])
    low, high = float(payload["min"]), float(payload["max"])
    codes = np.asarray(payload["data"], dtype=np.float64)
    levels = (1 << bits) - 1
    return (low + codes / levels * (high - low)).astype(np.float32)


def tolerance(payload: Mapping[str, Any]) -> float:
    """Worst case reconstruction error of a quantised payload."""

    levels = (1 << check_bits(payload["bits"])) - 1
    return (float(payload["max"]) - float(payload["min"])) / levels / 2.0


__all__ = ["DEFAULT_BITS", "MAX_BITS", "MIN_BITS", "check_bits", "dequantize", "quantize", "tolerance"]
