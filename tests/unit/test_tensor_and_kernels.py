import numpy as np
import pytest

from microtrain.core.context import TrainerContext
from microtrain.core.kernels import (
    BindingError,
    ContextLostError,
    KernelRegistry,
    UniformError,
    reorganize,
)
from microtrain.core.tensor import TensorBuffer


def test_byte_buffer_rounds_and_reads_as_float():
    buf = TensorBuffer(2, is_float=False)
    buf.write(np.full((2, 2, 4), 0.5, dtype=np.float32))
    assert buf.raw.dtype == np.uint8
    assert buf.raw[0, 0, 0] == 128
    assert np.allclose(buf.read(), 128 / 255.0)


def test_shared_constants_are_read_only():
    ctx = TrainerContext(0)
    ones = ctx.ones(4)
    assert ones is ctx.ones(4)
    with pytest.raises(ValueError):
        ones.fill(2.0)


def test_sample_and_mipmap():
    values = np.arange(16, dtype=np.float32).reshape(4, 4)
    buf = TensorBuffer.from_array(values)
    assert buf.sample(2)[:, :, 0].tolist() == [[0.0, 2.0], [8.0, 10.0]]
    assert buf.mipmap(1)[:, :, 0].tolist() == [[2.5, 4.5], [10.5, 12.5]]
    with pytest.raises(ValueError):
        buf.mipmap(3)


def test_tensor_json_round_trip_is_exact():
    rng = np.random.default_rng(0)
    buf = TensorBuffer.random(4, mean=0.0, deviation=1.0, rng=rng)
    doc = buf.export_toJSON()
    assert doc["isPot"] and doc["width"] == 4 and doc["isFloat"]
    assert np.array_equal(TensorBuffer.from_json(doc).read(), buf.read())


def test_from_array_rejects_bad_shapes():
    with pytest.raises(ValueError):
        TensorBuffer.from_array(np.zeros((2, 2, 3)))


def test_dispatch_runs_kernel_into_target():
    ctx = TrainerContext(0)
    source = TensorBuffer.filled(2, 3.0)
    target = TensorBuffer(2)
    ctx.run("copy_scale", target, {"source": source}, scale=0.5)
    assert np.allclose(target.read(), 1.5)
    assert ctx.dispatcher.kernel_counts["copy_scale"] == 1


@pytest.mark.parametrize(
    "kernel, uniforms",
    [
        ("copy_scale", {"scale": float("nan")}),
        ("copy_scale", {"scale": None}),
        ("copy_scale", {"scale": np.float32("nan")}),
    ],
)
def test_nan_or_undefined_uniform_is_rejected(kernel, uniforms):
    ctx = TrainerContext(0)
    target = TensorBuffer(2)
    with pytest.raises(UniformError):
        ctx.run(kernel, target, {"source": TensorBuffer(2)}, **uniforms)
    assert ctx.dispatcher.dispatch_count == 0


def test_nan_inside_vector_uniform_is_rejected():
    ctx = TrainerContext(0)
    with pytest.raises(UniformError):
        ctx.run(
            "clamp_mask",
            TensorBuffer(2),
            {"source": TensorBuffer(2), "mask": ctx.ones(2)},
            clampRange=[0.0, float("nan")],
        )


def test_binding_errors():
    ctx = TrainerContext(0)
    source, target = TensorBuffer(2), TensorBuffer(2)
    with pytest.raises(KeyError):
        ctx.run("does_not_exist", target, {"source": source})
    with pytest.raises(BindingError):
        ctx.run("copy", target, {})
    with pytest.raises(BindingError):
        ctx.run("copy", target, {"source": source, "mask": source})
    with pytest.raises(BindingError):
        ctx.run("copy_scale", target, {"source": source})
    with pytest.raises(BindingError):
        ctx.run("copy", target, {"source": target})
    with pytest.raises(BindingError):
        ctx.run("copy", target, {"source": TensorBuffer(2, semantic="display")})
    with pytest.raises(BindingError):
        ctx.run("copy", ctx.zeros(2), {"source": source})
    source.release()
    with pytest.raises(BindingError):
        ctx.run("copy", target, {"source": source})


def test_kernel_result_must_match_target():
    registry = KernelRegistry()

    @registry.kernel("broken", samplers=("source",))
    def _broken(src, u, target):
        return np.zeros((1, 1, 4), dtype=np.float32)

    ctx = TrainerContext(0, registry=registry)
    with pytest.raises(BindingError):
        ctx.run("broken", TensorBuffer(2), {"source": TensorBuffer(2)})


def test_lost_context_rejects_dispatch():
    ctx = TrainerContext(0)
    ctx.lose()
    assert ctx.lost
    with pytest.raises(ContextLostError):
        ctx.run("copy", TensorBuffer(2), {"source": TensorBuffer(2)})


def test_contexts_are_independent():
    first, second = TrainerContext(0), TrainerContext(0)
    first.lose()
    second.run("copy", TensorBuffer(2), {"source": TensorBuffer(2)})
    assert second.dispatcher.dispatch_count == 1


def test_reorganize_inverse():
    values = np.random.default_rng(3).normal(size=(6, 6, 4)).astype(np.float32)
    shuffled = reorganize(values, (2, 3))
    assert not np.array_equal(shuffled, values)
    assert np.array_equal(reorganize(shuffled, (3, 2)), values)


def test_neighbourhood_kernels_sample_at_the_ds_step():
    ctx = TrainerContext(0)
    values = np.random.default_rng(5).uniform(size=(8, 8, 4)).astype(np.float32)
    source = TensorBuffer.from_array(values)

    def box_mean(step):
        rolled = [np.roll(values, (dy * step, dx * step), axis=(0, 1)) for dy in (-1, 0, 1) for dx in (-1, 0, 1)]
        return np.mean(rolled, axis=0)

    for step in (1, 2):
        out = ctx.run("mean_normalization", TensorBuffer(8), {"source": source, "mask": ctx.ones(8)}, ds=step / 8)
        assert np.allclose(out.read(), values - box_mean(step), atol=1e-5)

    flat = TensorBuffer.from_array(np.full((8, 8, 4), 0.3, dtype=np.float32))
    edges = ctx.run("sobel", TensorBuffer(8), {"source": flat, "mask": ctx.ones(8)}, ds=2 / 8)
    assert np.allclose(edges.read(), 0.0, atol=1e-6)
    with pytest.raises(BindingError):
        ctx.run("sobel", TensorBuffer(8), {"source": flat, "mask": ctx.ones(8)})
