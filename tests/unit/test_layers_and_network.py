import numpy as np
import pytest

from microtrain.core.context import TrainerContext
from microtrain.core.tensor import TensorBuffer
from microtrain.network import InputLayer, LayerSpec, MaxPooling, Network, NeuronLayer


def _ones(size):
    return TensorBuffer.filled(size, 1.0)


def test_layer_spec_rejects_unknown_keys():
    with pytest.raises(ValueError):
        LayerSpec.from_mapping({"size": 4, "dropout": 0.5})
    spec = LayerSpec.from_mapping({"sizeSqrt": 4, "connectivityUp": "square", "clampOutputRange": [0, 2]})
    assert spec.size == 4 and spec.connectivity_up == "square"
    assert spec.clamp_output_range == (0.0, 2.0)


def test_classes_count_fixes_size_normalize_and_clamp_range():
    layer = NeuronLayer({"classesCount": 5, "connectivityUp": "full"}, 1, TrainerContext(0))
    assert layer.size == 4
    assert layer.normalize
    assert layer.clamp_range == (0.0, 1.0)


def test_dense_connectivity_forces_sparsity():
    layer = NeuronLayer({"size": 2, "connectivityUp": "full", "sparsity": 3}, 1, TrainerContext(0))
    layer.link(4)
    assert layer.sparsity == 4
    direct = NeuronLayer({"size": 4, "sparsity": 3}, 1, TrainerContext(0))
    direct.link(4)
    assert direct.sparsity == 1


@pytest.mark.parametrize(
    "spec",
    [
        {"size": 4, "activation": "swish"},
        {"size": 4, "clampOutput": "sometimes"},
        {"size": 4, "shiftRGBAMode": 3},
        {"size": 4, "connectivityUp": "diagonal"},
        {"size": 4, "maxPooling": 3},
    ],
)
def test_invalid_layer_options(spec):
    with pytest.raises(ValueError):
        NeuronLayer(spec, 1, TrainerContext(0))


def test_input_layer_preprocessing():
    ctx = TrainerContext(0)
    with pytest.raises(ValueError):
        InputLayer(4, ctx, preprocessing="fourier")
    mask = np.zeros((4, 4), dtype=np.float32)
    mask[:2] = 1.0
    layer = InputLayer(4, ctx, preprocessing="copyChannels", mask=mask)
    out = layer.process_feedforward(_ones(4)).read()
    assert np.allclose(out[:2], 1.0) and np.allclose(out[2:], 0.0)
    gray = InputLayer(4, ctx, preprocessing="grayScale").process_feedforward(_ones(4)).read()
    assert np.allclose(gray, 1.0)


def test_max_pooling_first_maximum_wins():
    ctx = TrainerContext(0)
    pooling = MaxPooling(2, 4, ctx)
    values = np.ones((4, 4), dtype=np.float32)
    values[3, 3] = 5.0
    out = pooling.process_feedforward(TensorBuffer.from_array(values)).read()
    assert out.shape == (2, 2, 4)
    assert out[1, 1, 0] == 5.0 and out[0, 0, 0] == 1.0
    mask = pooling.get_outputMaskTexture().read()[:, :, 0]
    assert mask[0, 0] == 1.0 and mask[0, 1] == 0.0
    assert mask[3, 3] == 1.0 and mask[2, 2] == 0.0
    assert mask.sum() == 4


def test_network_needs_two_layers():
    with pytest.raises(ValueError):
        Network([{"size": 4}], TrainerContext(0))


def test_layer_sizes_and_accessors():
    net = Network(
        [
            {"size": 8},
            {"size": 8, "connectivityUp": "square", "sparsity": 3, "maxPooling": 2, "activation": "relu"},
            {"classesCount": 3, "connectivityUp": "full", "activation": "sigmoid"},
        ],
        TrainerContext(0),
    )
    assert net.get_layerSizes() == [2, 8, 8]
    assert net.get_numberLayers() == 3
    assert net.get_maxLayerSize() == 8
    assert net.get_inputWidth() == 8 and net.get_outputWidth() == 2
    assert net.get_classesCount() == 3
    assert net.layers[2].previous_output_size == 4


def test_conv_layer_is_reorganized_unless_next_is_full():
    conv = {"size": 4, "connectivityUp": "conv", "kernelsCount": 2, "sparsity": 3}
    net = Network([{"size": 8}, conv, {"size": 4}], TrainerContext(0))
    assert net.layers[1].is_reorganize
    net = Network([{"size": 8}, conv, {"size": 2, "connectivityUp": "full"}], TrainerContext(0))
    assert not net.layers[1].is_reorganize


def test_result_rows_follow_pixel_order():
    net = Network([{"size": 2}, {"size": 2, "initToZero": True}], TrainerContext(0))
    net.build_output()
    values = np.arange(16, dtype=np.float32).reshape(2, 2, 4)
    expected = TensorBuffer.from_array(-values)
    result = net.process_feedforward(_ones(2), True, expected)
    assert result.shape == (4, 4)
    # pixel i is (i % 2, i // 2)
    assert result[1].tolist() == values[0, 1].tolist()
    assert result[2].tolist() == values[1, 0].tolist()


def test_classification_result_has_one_row_per_class():
    net = Network([{"size": 4}, {"classesCount": 3, "connectivityUp": "full"}], TrainerContext(0))
    net.build_output()
    result = net.process_feedforward(_ones(4), True, TensorBuffer(2))
    assert result.shape == (3, 4)


def test_hidden_deltas_are_gated_by_max_pooling_mask():
    ctx = TrainerContext(2)
    net = Network(
        [
            {"size": 4},
            {"size": 4, "maxPooling": 2, "activation": "copy"},
            {"size": 2, "connectivityUp": "full"},
        ],
        ctx,
    )
    net.build_output()
    net.build_backPropagation()
    inputs = TensorBuffer.from_array(np.random.default_rng(0).uniform(size=(4, 4, 4)).astype(np.float32))
    net.process_feedforward(inputs, False)
    net.process_backpropagation(TensorBuffer.filled(2, 1.0), [], "bp_quadratic")
    hidden = net.layers[1]
    deltas = hidden.get_bpDeltas().read()
    mask = hidden.max_pooling.get_outputMaskTexture().read()
    assert np.all(deltas[mask == 0] == 0)
    assert np.any(deltas[mask == 1] != 0)


def test_learning_with_l2_decay_on_zero_gradient():
    ctx = TrainerContext(0)
    net = Network([{"size": 2}, {"size": 2}], ctx)
    net.build_output()
    net.build_backPropagation()
    layer = net.layers[1]
    inputs = _ones(2)
    output = net.process_feedforward(inputs, False)
    before = layer.connectivity.weights.read()
    net.process_backpropagation(output.clone(), [], "bp_quadratic")
    net.process_learning([1.0], [0.5])
    assert np.allclose(layer.connectivity.weights.read(), before * 0.5)


def _loss(net, inputs, expected):
    output = net.process_feedforward(inputs, False).read()
    return 0.5 * float(np.sum((output.astype(np.float64) - expected) ** 2))


@pytest.mark.parametrize(
    "layers",
    [
        [{"size": 4}, {"size": 4, "activation": "sigmoid"}, {"size": 2, "connectivityUp": "full"}],
        [{"size": 4}, {"size": 4, "connectivityUp": "full", "activation": "sigmoid"}, {"size": 2, "connectivityUp": "full"}],
        [{"size": 4}, {"size": 3, "connectivityUp": "fullNPoT", "activation": "sigmoid"}, {"size": 3}],
        [{"size": 4}, {"size": 4, "connectivityUp": "square", "sparsity": 3, "activation": "sigmoid"}, {"size": 4}],
        [{"size": 8}, {"size": 4, "connectivityUp": "squareFast", "sparsity": 6, "activation": "sigmoid"}, {"size": 4}],
        [
            {"size": 4},
            {"size": 4, "connectivityUp": "conv", "kernelsCount": 2, "sparsity": 2, "activation": "sigmoid"},
            {"size": 4},
        ],
        [
            {"size": 4},
            {"size": 8, "connectivityUp": "full", "maxPooling": 2, "activation": "sigmoid"},
            {"size": 4},
        ],
    ],
    ids=["direct", "full", "fullNPoT", "square", "squareFast", "conv_reorganized", "maxPooling"],
)
def test_hidden_weight_updates_match_finite_differences(layers):
    net = Network(layers, TrainerContext(5))
    net.build_output()
    net.build_backPropagation()
    rng = np.random.default_rng(1)
    width = net.get_inputWidth()
    inputs = TensorBuffer.from_array(rng.uniform(-1.0, 1.0, size=(width, width, 4)).astype(np.float32))
    out_width = net.get_outputWidth()
    target = rng.uniform(-0.5, 0.5, size=(out_width, out_width, 4))
    hidden = net.layers[1]
    weights = hidden.connectivity.weights
    saved = [(layer.connectivity.weights.read(), layer.bias.read()) for layer in net.layers[1:]]

    net.process_feedforward(inputs, False)
    net.process_backpropagation(TensorBuffer.from_array(target.astype(np.float32)), None, "bp_quadratic")
    net.process_learning([1.0] * (len(layers) - 1), [0.0] * (len(layers) - 1))
    analytic = saved[0][0].astype(np.float64) - weights.read()
    assert np.any(analytic != 0)

    for layer, (w, b) in zip(net.layers[1:], saved):
        layer.connectivity.weights.write(w)
        layer.bias.write(b)

    eps = 1e-3
    flat = saved[0][0].reshape(-1)
    picks = rng.choice(flat.size, size=min(12, flat.size), replace=False)
    for pick in picks:
        shifted = flat.copy()
        shifted[pick] += eps
        weights.write(shifted.reshape(weights.shape))
        up = _loss(net, inputs, target)
        shifted[pick] -= 2 * eps
        weights.write(shifted.reshape(weights.shape))
        down = _loss(net, inputs, target)
        numeric = (up - down) / (2 * eps)
        assert analytic.reshape(-1)[pick] == pytest.approx(numeric, rel=3e-2, abs=3e-3)
    weights.write(saved[0][0])


def _output_layer(spec, size=2):
    ctx = TrainerContext(0)
    layer = NeuronLayer(spec, 1, ctx, is_output=True)
    layer.link(size)
    layer.setup_output()
    return layer, ctx


def test_clamp_all_clips_every_output():
    layer, _ = _output_layer({"size": 2, "clampOutput": "all", "clampOutputRange": [-0.5, 0.5]})
    layer.connectivity.weights.fill(3.0)
    out = layer.process_feedforward(TensorBuffer.from_array(np.full((2, 2, 4), 0.5, dtype=np.float32))).read()
    assert np.allclose(out, 0.5)
    out = layer.process_feedforward(TensorBuffer.from_array(np.full((2, 2, 4), -0.5, dtype=np.float32))).read()
    assert np.allclose(out, -0.5)


def test_clamp_mask_clips_only_masked_pixels():
    layer, _ = _output_layer({"size": 2, "clampOutput": "mask", "clampOutputRange": [0.0, 1.0]})
    layer.connectivity.weights.fill(1.0)
    inputs = TensorBuffer.from_array(np.full((2, 2, 4), 3.0, dtype=np.float32))
    mask = np.zeros((2, 2), dtype=np.float32)
    mask[0, 0] = 1.0
    out = layer.process_feedforward(inputs, clamp_mask=TensorBuffer.from_array(mask)).read()
    assert np.allclose(out[0, 0], 1.0)
    assert np.allclose(out[1, 1], 3.0)
    # without a mask every output is clamped
    assert np.allclose(layer.process_feedforward(inputs).read(), 1.0)


def test_normalize_divides_by_layer_size():
    layer, _ = _output_layer({"size": 4, "normalize": True}, size=4)
    layer.connectivity.weights.fill(1.0)
    values = np.arange(64, dtype=np.float32).reshape(4, 4, 4)
    out = layer.process_feedforward(TensorBuffer.from_array(values)).read()
    assert np.allclose(out, values / 4)


def test_cross_entropy_deltas():
    ctx = TrainerContext(0)
    output = np.array([[0.2, 0.9], [0.0, 1.0]], dtype=np.float32)
    expected = np.array([[0.0, 1.0], [1.0, 0.0]], dtype=np.float32)
    deltas = ctx.run(
        "bp_cross_entropy",
        TensorBuffer(2),
        {
            "output": TensorBuffer.from_array(output),
            "expected": TensorBuffer.from_array(expected),
            "mask": ctx.ones(2),
        },
    ).read()[:, :, 0]
    clipped = np.clip(output.astype(np.float64), 1e-6, 1 - 1e-6)
    reference = (clipped - expected) / np.maximum(clipped * (1 - clipped), 1e-6)
    assert np.allclose(deltas[0], reference[0], rtol=1e-4)
    assert deltas[0, 0] == pytest.approx(1.25, rel=1e-5)
    # saturated outputs are clipped away from 0 and 1
    assert deltas[1, 0] < -1e5 and deltas[1, 1] > 1e5
    assert np.all(np.isfinite(deltas))
