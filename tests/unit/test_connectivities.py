import numpy as np
import pytest

from microtrain.core.connectivities import (
    ConnectivityKind,
    ConnectivityParams,
    build_connectivity,
)
from microtrain.core.context import TrainerContext
from microtrain.core.tensor import TensorBuffer


def _inputs(size, seed=0):
    values = np.random.default_rng(seed).uniform(-1, 1, size=(size, size, 4))
    return TensorBuffer.from_array(values.astype(np.float32))


@pytest.mark.parametrize(
    "kind, params, w_size, b_size",
    [
        ("direct", ConnectivityParams(4, 4, 1), 4, 4),
        ("full", ConnectivityParams(4, 2, 4), 8, 2),
        ("fullNPoT", ConnectivityParams(3, 2, 3), 6, 2),
        ("square", ConnectivityParams(8, 4, 3), 12, 4),
        ("squareFast", ConnectivityParams(8, 4, 6), 24, 4),
        ("conv", ConnectivityParams(8, 4, 3, kernels_count=2, layer_index=1), 6, 2),
    ],
)
def test_output_matches_layer_size(kind, params, w_size, b_size):
    ctx = TrainerContext(0)
    conn = build_connectivity(kind, params, ctx)
    assert conn.w_size == w_size
    assert conn.b_size == b_size
    target = TensorBuffer(params.to_size)
    out = conn.process_feedforward(_inputs(params.from_size), TensorBuffer(b_size), target)
    assert out.shape == (params.to_size, params.to_size, 4)
    assert np.all(np.isfinite(out.read()))
    assert conn.process_backpropagation(TensorBuffer.filled(params.to_size, 1.0)).width == params.from_size


def test_direct_feedforward_and_backprop():
    ctx = TrainerContext(0)
    conn = build_connectivity("direct", ConnectivityParams(2, 2, 1), ctx)
    inputs = _inputs(2)
    bias = TensorBuffer.filled(2, 0.25)
    out = conn.process_feedforward(inputs, bias, TensorBuffer(2)).read()
    assert np.allclose(out, inputs.read() * conn.weights.read() + 0.25)
    deltas = TensorBuffer.filled(2, 2.0)
    assert np.allclose(conn.process_backpropagation(deltas).read(), 2.0 * conn.weights.read())
    assert conn.get_fromSparsity() == 1.0


def test_full_and_full_npot_agree_on_pot_sizes():
    ctx = TrainerContext(0)
    full = build_connectivity("full", ConnectivityParams(4, 2, 4), ctx)
    npot = build_connectivity("fullNPoT", ConnectivityParams(4, 2, 4), ctx)
    npot.weights.copy_from(full.weights)
    inputs, bias = _inputs(4), TensorBuffer.filled(2, 0.1)
    a = full.process_feedforward(inputs, bias, TensorBuffer(2)).read()
    b = npot.process_feedforward(inputs, bias, TensorBuffer(2)).read()
    assert np.allclose(a, b, atol=1e-5)
    assert full.get_fromSparsity() == 2.0


def test_full_npot_matches_dense_product():
    ctx = TrainerContext(1)
    conn = build_connectivity("fullNPoT", ConnectivityParams(3, 2, 3), ctx)
    inputs = _inputs(3, seed=1)
    out = conn.process_feedforward(inputs, TensorBuffer(2), TensorBuffer(2)).read()
    w, x = conn.weights.read(), inputs.read()
    for ty in range(2):
        for tx in range(2):
            tile = w[ty * 3 : ty * 3 + 3, tx * 3 : tx * 3 + 3]
            assert np.allclose(out[ty, tx], (tile * x).sum(axis=(0, 1)), atol=1e-5)

    deltas = _inputs(2, seed=2)
    bp = conn.process_backpropagation(deltas).read()
    expected = np.zeros((3, 3, 4))
    for ty in range(2):
        for tx in range(2):
            expected += w[ty * 3 : ty * 3 + 3, tx * 3 : tx * 3 + 3] * deltas.read()[ty, tx]
    assert np.allclose(bp, expected, atol=1e-5)


def test_square_window_wraps_around():
    ctx = TrainerContext(0)
    conn = build_connectivity("square", ConnectivityParams(4, 4, 3), ctx)
    coords = conn.connections.read().astype(int)
    # neuron (0, 0) reads x in {3, 0, 1}
    assert sorted(set(coords[0, 0:3, 0].tolist())) == [0, 1, 3]


def test_conv_weight_gradients_accumulate_over_clusters():
    ctx = TrainerContext(0)
    conn = build_connectivity("conv", ConnectivityParams(8, 4, 3, kernels_count=2, layer_index=1), ctx)
    assert conn.bias_cluster_size == 2
    assert conn.stride == 4
    dweights = conn.process_learningWeights(
        TensorBuffer.filled(4, 1.0), TensorBuffer.filled(8, 1.0), 1.0, TensorBuffer(conn.w_size)
    )
    assert np.allclose(dweights.read(), 4.0)
    dbias = conn.process_learningBiases(TensorBuffer.filled(4, 1.0), 0.5, TensorBuffer(conn.b_size))
    assert np.allclose(dbias.read(), 2.0)


def test_conv_window_is_centred_when_wider_than_stride():
    ctx = TrainerContext(0)
    anchored = build_connectivity("conv", ConnectivityParams(8, 4, 3, kernels_count=2, layer_index=1), ctx)
    assert anchored.connections.read()[0, :3, 0].tolist() == [0.0, 1.0, 2.0]
    centred = build_connectivity("conv", ConnectivityParams(4, 8, 5, kernels_count=2, layer_index=1), ctx)
    assert centred.stride == 1
    assert centred.connections.read()[0, :5, 0].tolist() == [2.0, 3.0, 0.0, 1.0, 2.0]


@pytest.mark.parametrize(
    "kind, params",
    [
        ("direct", ConnectivityParams(4, 2, 1)),
        ("full", ConnectivityParams(3, 2, 3)),
        ("fullNPoT", ConnectivityParams(3, 2, 2)),
        ("squareFast", ConnectivityParams(4, 8, 3)),
        ("squareFast", ConnectivityParams(8, 4, 4)),
        ("squareFast", ConnectivityParams(8, 4, 10, stride=2)),
        ("conv", ConnectivityParams(5, 4, 3, kernels_count=2, layer_index=1)),
        ("conv", ConnectivityParams(8, 4, 3, kernels_count=0, layer_index=1)),
    ],
)
def test_invalid_geometry_is_rejected(kind, params):
    with pytest.raises(ValueError):
        build_connectivity(kind, params, TrainerContext(0))


def test_unknown_kind_and_mismatched_backup():
    with pytest.raises(ValueError):
        ConnectivityKind.parse("diagonal")
    ctx = TrainerContext(0)
    doc = build_connectivity("direct", ConnectivityParams(2, 2, 1), ctx).export_toJSON()
    with pytest.raises(ValueError):
        build_connectivity("full", ConnectivityParams(2, 2, 2), ctx, doc)


def test_backup_restores_weights_exactly():
    ctx = TrainerContext(0)
    source = build_connectivity("square", ConnectivityParams(4, 4, 3), ctx)
    doc = source.export_toJSON()
    assert doc["kind"] == "square"
    assert doc["params"] == {"fromLayerSize": 4, "toLayerSize": 4, "toSparsity": 3}
    restored = build_connectivity("square", ConnectivityParams(4, 4, 3), TrainerContext(5), doc)
    assert np.array_equal(restored.weights.read(), source.weights.read())


def test_init_to_zero():
    conn = build_connectivity("direct", ConnectivityParams(2, 2, 1, init_to_zero=True), TrainerContext(0))
    assert not conn.weights.read().any()
