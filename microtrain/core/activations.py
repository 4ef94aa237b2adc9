"""Activation functions and their derivatives for microtrain layers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable

import numpy as np

from .types import Array

_SELU_LAMBDA = 1.0507009873554805
_SELU_ALPHA = 1.6732632423543772
_GELU_K = np.sqrt(2.0 / np.pi)


def sigmoid(x: Array) -> Array:
    """Return the logistic sigmoid, computed without overflow."""

    return 0.5 * (1.0 + np.tanh(0.5 * x))


def relu(x: Array) -> Array:
    """Return the ReLU activation."""

    return np.maximum(x, 0.0)


def softplus(x: Array) -> Array:
    return np.logaddexp(0.0, x)


def elu(x: Array, alpha: float = 1.0) -> Array:
    return np.where(x > 0.0, x, alpha * np.expm1(np.minimum(x, 0.0)))


def selu(x: Array) -> Array:
    return _SELU_LAMBDA * elu(x, _SELU_ALPHA)


def gelu(x: Array) -> Array:
    return 0.5 * x * (1.0 + np.tanh(_GELU_K * (x + 0.044715 * x**3)))


def arctan2(x: Array) -> Array:
    """Arctangent rescaled into ``(-1, 1)``."""

    return (2.0 / np.pi) * np.arctan(x)


# ------------------------------------------------------------------
# Derivatives, all expressed from the pre-activation ``z``


def _d_sigmoid(z: Array) -> Array:
    s = sigmoid(z)
    return s * (1.0 - s)


def _d_relu(z: Array) -> Array:
    return (z > 0.0).astype(np.float32)


def _d_elu(z: Array, alpha: float = 1.0) -> Array:
    return np.where(z > 0.0, 1.0, alpha * np.exp(np.minimum(z, 0.0)))


def _d_pelu(z: Array) -> Array:
    # forward pass is plain ELU, backward keeps a 0.1 leak on saturated units
    return np.maximum(_d_elu(z), 0.1)


def _d_selu(z: Array) -> Array:
    return _SELU_LAMBDA * _d_elu(z, _SELU_ALPHA)


def _d_gelu(z: Array) -> Array:
    inner = _GELU_K * (z + 0.044715 * z**3)
    t = np.tanh(inner)
    d_inner = _GELU_K * (1.0 + 3.0 * 0.044715 * z**2)
    return 0.5 * (1.0 + t) + 0.5 * z * (1.0 - t**2) * d_inner


def _d_arctan(z: Array) -> Array:
    return 1.0 / (1.0 + z**2)


@dataclass(frozen=True)
class Activation:
    """An activation kind: forward function and derivative w.r.t. its input."""

    name: str
    forward: Callable[[Array], Array]
    derivative: Callable[[Array], Array]

    @property
    def kernel(self) -> str:
        return f"activation_{self.name}"

    @property
    def bp_kernel(self) -> str:
        return f"bp_activation_{self.name}"


_ACTIVATIONS: Dict[str, Activation] = {}


def _register(name: str, forward, derivative) -> None:
    _ACTIVATIONS[name] = Activation(name, forward, derivative)


_register("sigmoid", sigmoid, _d_sigmoid)
_register("softplus", softplus, sigmoid)
_register("relu", relu, _d_relu)
_register("pelu", elu, _d_pelu)
_register("copy", lambda x: x, np.ones_like)
_register("elu", elu, _d_elu)
_register("elu01", lambda x: elu(x, 0.1), lambda z: _d_elu(z, 0.1))
_register("selu", selu, _d_selu)
_register("gelu", gelu, _d_gelu)
_register("arctan", np.arctan, _d_arctan)
_register("arctan2", arctan2, lambda z: (2.0 / np.pi) * _d_arctan(z))


def get_activation(name: str) -> Activation:
    try:
        return _ACTIVATIONS[name]
    except KeyError:
        available = ", ".join(sorted(_ACTIVATIONS))
        raise ValueError(f"Unknown activation {name!r}. Available activations: {available}") from None


def names() -> Iterable[str]:
    return sorted(_ACTIVATIONS)


__all__ = [
    "Activation",
    "arctan2",
    "elu",
    "gelu",
    "get_activation",
    "names",
    "relu",
    "selu",
    "sigmoid",
    "softplus",
]
