"""Two dimensional, four channel tensor buffers.

A :class:`TensorBuffer` is the only storage primitive of the engine. Each buffer
is a square grid of pixels (one pixel per neuron) with four parallel channels
(RGBA). The four channels behave as four independent networks sharing the same
topology, so every kernel works channel-wise.

Float buffers store ``float32`` values. Byte buffers store ``uint8`` values that
encode the ``[0, 1]`` range and are mostly used for masks.
"""

from __future__ import annotations

from typing import Any, Mapping

import numpy as np

from .types import Array

CHANNELS = 4
SEMANTICS = ("data", "display")


def is_pot(value: int) -> bool:
    """Return ``True`` when ``value`` is a power of two."""

    return value > 0 and (value & (value - 1)) == 0


class TensorBuffer:
    """A width x height x RGBA buffer usable as a kernel source or target."""

    def __init__(
        self,
        width: int,
        height: int | None = None,
        *,
        is_float: bool = True,
        semantic: str = "data",
        is_mipmap: bool = False,
        name: str = "",
    ) -> None:
        width = int(width)
        height = int(width if height is None else height)
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid tensor buffer size: {width}x{height}")
        if semantic not in SEMANTICS:
            raise ValueError(f"Unknown tensor semantic: {semantic}")
        self.width = width
        self.height = height
        self.is_float = bool(is_float)
        self.semantic = semantic
        self.is_mipmap = bool(is_mipmap)
        self.name = name
        self.released = False
        dtype = np.float32 if self.is_float else np.uint8
        self._data = np.zeros((height, width, CHANNELS), dtype=dtype)

    # ------------------------------------------------------------------
    # Constructors

    @classmethod
    def from_array(
        cls, array: Array, *, is_float: bool = True, semantic: str = "data", name: str = ""
    ) -> "TensorBuffer":
        """Build a buffer from a ``(h, w)``, ``(h, w, 1)`` or ``(h, w, 4)`` array."""

        values = np.asarray(array, dtype=np.float32)
        if values.ndim == 2:
            values = np.repeat(values[:, :, None], CHANNELS, axis=2)
        elif values.ndim == 3 and values.shape[2] == 1:
            values = np.repeat(values, CHANNELS, axis=2)
        if values.ndim != 3 or values.shape[2] != CHANNELS:
            raise ValueError(f"Cannot build a tensor buffer from shape {values.shape}")
        buf = cls(values.shape[1], values.shape[0], is_float=is_float, semantic=semantic, name=name)
        buf.write(values)
        return buf

    @classmethod
    def random(
        cls,
        width: int,
        *,
        mean: float,
        deviation: float,
        rng: np.random.Generator,
        name: str = "",
    ) -> "TensorBuffer":
        buf = cls(width, name=name)
        buf._data[...] = rng.normal(mean, deviation, size=buf.shape).astype(np.float32)
        return buf

    @classmethod
    def zeros(cls, width: int, *, is_float: bool = True, name: str = "") -> "TensorBuffer":
        return cls(width, is_float=is_float, name=name)

    @classmethod
    def filled(cls, width: int, value: float, *, is_float: bool = True, name: str = "") -> "TensorBuffer":
        buf = cls(width, is_float=is_float, name=name)
        buf.fill(value)
        return buf

    # ------------------------------------------------------------------
    # Accessors

    @property
    def shape(self) -> tuple[int, int, int]:
        return (self.height, self.width, CHANNELS)

    @property
    def is_pot(self) -> bool:
        return is_pot(self.width) and is_pot(self.height)

    @property
    def is_read_only(self) -> bool:
        return not self._data.flags.writeable

    @property
    def raw(self) -> Array:
        """Underlying storage, as stored (``uint8`` for byte buffers)."""

        return self._data

    def read(self) -> Array:
        """Return a float32 copy of the buffer contents."""

        if self.is_float:
            return self._data.copy()
        return self._data.astype(np.float32) / 255.0

    def view(self) -> Array:
        """Return the contents as float32 without copying float buffers."""

        if self.is_float:
            return self._data
        return self._data.astype(np.float32) / 255.0

    def read_pixel(self, x: int, y: int) -> Array:
        return self.view()[y, x].copy()

    def sample(self, width: int) -> Array:
        """Nearest-neighbour sampling of the buffer at ``width x width``."""

        values = self.view()
        if width == self.width and width == self.height:
            return values
        ys = (np.arange(width) * self.height) // width
        xs = (np.arange(width) * self.width) // width
        return values[ys][:, xs]

    def mipmap(self, level: int) -> Array:
        """Return the mean over ``2**level`` blocks, as a GPU mip level would."""

        factor = 1 << int(level)
        if self.width % factor or self.height % factor:
            raise ValueError(f"Mip level {level} does not divide a {self.width}px buffer")
        values = self.view()
        h, w = self.height // factor, self.width // factor
        return values.reshape(h, factor, w, factor, CHANNELS).mean(axis=(1, 3))

    # ------------------------------------------------------------------
    # Mutation

    def write(self, values: Array) -> None:
        values = np.asarray(values, dtype=np.float32)
        if values.shape != self.shape:
            raise ValueError(
                f"Cannot write an array of shape {values.shape} into buffer {self.shape}"
            )
        if self.is_read_only:
            raise ValueError(f"Tensor buffer {self.name or '<anonymous>'} is read-only")
        if self.is_float:
            self._data[...] = values
        else:
            self._data[...] = np.clip(np.rint(values * 255.0), 0, 255).astype(np.uint8)

    def fill(self, value: float) -> None:
        self.write(np.full(self.shape, value, dtype=np.float32))

    def copy_from(self, other: "TensorBuffer") -> None:
        if other.shape != self.shape:
            raise ValueError(f"Cannot copy a {other.shape} buffer into {self.shape}")
        self.write(other.view())

    def clone(self) -> "TensorBuffer":
        buf = TensorBuffer(
            self.width,
            self.height,
            is_float=self.is_float,
            semantic=self.semantic,
            is_mipmap=self.is_mipmap,
            name=self.name,
        )
        buf._data[...] = self._data
        return buf

    def freeze(self) -> "TensorBuffer":
        """Make the buffer read-only. There is no way back."""

        self._data.flags.writeable = False
        return self

    def release(self) -> None:
        self.released = True

    # ------------------------------------------------------------------
    # Serialisation

    def export_toJSON(self) -> dict:
        values = self._data if not self.is_float else self._data.astype(np.float32)
        return {
            "isPot": self.is_pot,
            "width": self.width,
            "isFloat": self.is_float,
            "data": values.reshape(-1).tolist(),
        }

    @classmethod
    def from_json(cls, doc: Mapping[str, Any], name: str = "") -> "TensorBuffer":
        from .quant import dequantize  # local import to avoid a cycle

        width = int(doc["width"])
        is_float = bool(doc.get("isFloat", True))
        payload = doc["data"]
        if isinstance(payload, Mapping) and "quantized" in payload:
            flat = dequantize(payload["quantized"])
        else:
            dtype = np.float32 if is_float else np.uint8
            flat = np.asarray(payload, dtype=dtype)
        height = flat.size // (width * CHANNELS)
        if height * width * CHANNELS != flat.size:
            raise ValueError(f"Tensor payload of {flat.size} values does not fit width {width}")
        buf = cls(width, height, is_float=is_float, name=name)
        if is_float:
            buf._data[...] = flat.reshape(buf.shape).astype(np.float32)
        else:
            buf._data[...] = flat.reshape(buf.shape).astype(np.uint8)
        return buf

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        kind = "float" if self.is_float else "byte"
        return f"TensorBuffer(name={self.name!r}, {self.width}x{self.height}, {kind})"


def as_tensor(value: Any, *, is_float: bool = True, name: str = "") -> TensorBuffer:
    """Return ``value`` unchanged if it is a buffer, else wrap the array."""

    if isinstance(value, TensorBuffer):
        return value
    return TensorBuffer.from_array(value, is_float=is_float, name=name)


__all__ = ["CHANNELS", "TensorBuffer", "as_tensor", "is_pot"]
