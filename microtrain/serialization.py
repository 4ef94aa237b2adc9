"""Network export/import documents and their lossy compression."""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, MutableMapping

from .core.context import TrainerContext
from .core.quant import DEFAULT_BITS, check_bits, dequantize, quantize
from .network.network import Network


def export_network(
    network: Network,
    problem_export_data: Mapping[str, Any] | None = None,
    trainer_data: Mapping[str, Any] | None = None,
) -> Dict[str, Any]:
    """Return the JSON-serialisable document describing ``network``."""

    return network.export_toJSON(problem_export_data, trainer_data)


def import_network(doc: Mapping[str, Any], context: TrainerContext | None = None) -> Network:
    """Rebuild a :class:`Network` (topology and weights) from an export document."""

    if doc.get("type", "RGBA") != "RGBA":
        raise ValueError(f"Unsupported network document type: {doc.get('type')}")
    if is_compressed(doc):
        doc = decompress(doc)
    return Network.from_export(doc, context or TrainerContext())


def save_json(doc: Mapping[str, Any], path: str | Path) -> str:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc))
    return str(path)


def load_json(path: str | Path) -> Dict[str, Any]:
    return json.loads(Path(path).read_text())


# ------------------------------------------------------------------
# Compression


def _tensor_docs(doc: MutableMapping[str, Any]) -> Iterator[MutableMapping[str, Any]]:
    for layer in doc.get("layers", []):
        if layer.get("kind", "neuron") != "neuron" or layer.get("type") == "input":
            continue
        yield layer["connectivity"]["weights"]
        yield layer["bias"]


def is_compressed(doc: Mapping[str, Any]) -> bool:
    return any(
        isinstance(tensor.get("data"), Mapping) and "quantized" in tensor["data"]
        for tensor in _tensor_docs(doc)  # type: ignore[arg-type]
    )


def compress(doc: Mapping[str, Any], level: int = DEFAULT_BITS) -> Dict[str, Any]:
    """Quantise every weight and bias payload on ``level`` bits."""

    bits = check_bits(level)
    out = copy.deepcopy(dict(doc))
    for tensor in _tensor_docs(out):
        if isinstance(tensor["data"], Mapping):
            continue
        tensor["data"] = {"quantized": quantize(tensor["data"], bits)}
    out["compression"] = {"level": bits}
    return out


def decompress(doc: Mapping[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(dict(doc))
    for tensor in _tensor_docs(out):
        payload = tensor["data"]
        if isinstance(payload, Mapping) and "quantized" in payload:
            tensor["data"] = dequantize(payload["quantized"]).tolist()
    out.pop("compression", None)
    return out


__all__ = [
    "compress",
    "decompress",
    "export_network",
    "import_network",
    "is_compressed",
    "load_json",
    "save_json",
]
