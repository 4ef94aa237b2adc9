import json

import numpy as np
import pytest

from microtrain.core.context import TrainerContext
from microtrain.core.quant import tolerance
from microtrain.core.tensor import TensorBuffer
from microtrain.network.network import Network
from microtrain.serialization import (
    compress,
    decompress,
    export_network,
    import_network,
    is_compressed,
    load_json,
    save_json,
)

LAYERS = [
    {"size": 8, "preprocessing": "none"},
    {"size": 8, "connectivityUp": "square", "sparsity": 3, "activation": "relu", "maxPooling": 2},
    {"size": 4, "connectivityUp": "conv", "kernelsCount": 2, "sparsity": 2, "activation": "elu"},
    {"size": 4, "connectivityUp": "direct", "shiftRGBAMode": 1, "activation": "gelu"},
    {"classesCount": 3, "connectivityUp": "full", "activation": "sigmoid"},
]


def _network(seed=0):
    return Network(LAYERS, TrainerContext(seed))


def _outputs(network):
    network.build_output()
    values = np.random.default_rng(11).uniform(size=(8, 8, 4)).astype(np.float32)
    return network.process_feedforward(TensorBuffer.from_array(values), True, TensorBuffer(2))


def test_round_trip_is_bit_exact(tmp_path):
    network = _network()
    doc = export_network(network, {"problem": "classification"})
    path = save_json(doc, tmp_path / "net.json")
    restored = import_network(load_json(path), TrainerContext(42))

    assert export_network(restored, {"problem": "classification"}) == json.loads(json.dumps(doc))
    assert np.array_equal(_outputs(restored), _outputs(network))
    assert [layer["kind"] for layer in doc["layers"]] == ["input"] + ["neuron"] * 4
    assert doc["layers"][2]["isReorganize"]
    assert doc["layers"][2]["connectivity"]["params"]["kernelsCount"] == 2


@pytest.mark.parametrize("level", [4, 8, 12])
def test_compressed_weights_are_within_tolerance(level):
    doc = export_network(_network())
    packed = compress(doc, level)
    assert is_compressed(packed) and not is_compressed(doc)
    assert packed["compression"] == {"level": level}
    unpacked = decompress(packed)
    for original, layer, packed_layer in zip(doc["layers"][1:], unpacked["layers"][1:], packed["layers"][1:]):
        payload = packed_layer["bias"]["data"]["quantized"]
        error = np.abs(np.asarray(layer["bias"]["data"]) - np.asarray(original["bias"]["data"]))
        assert error.max() <= tolerance(payload) + 1e-6
        payload = packed_layer["connectivity"]["weights"]["data"]["quantized"]
        error = np.abs(
            np.asarray(layer["connectivity"]["weights"]["data"])
            - np.asarray(original["connectivity"]["weights"]["data"])
        )
        assert error.max() <= tolerance(payload) + 1e-6

    network = import_network(packed, TrainerContext(1))
    assert network.get_layerSizes() == [2, 4, 4, 8, 8]


def test_invalid_compression_level():
    with pytest.raises(ValueError):
        compress(export_network(_network()), 0)


def test_import_rejects_foreign_documents():
    with pytest.raises(ValueError):
        import_network({"type": "GRAYSCALE", "layers": []})
    doc = export_network(_network())
    doc["layers"][1]["connectivity"]["kind"] = "full"
    with pytest.raises(ValueError):
        import_network(doc)
