import numpy as np
import pytest

from microtrain.core.types import Sample, SampleEvaluation
from microtrain.training.problems import (
    ConstantProblem,
    PatternClassificationProblem,
    PooledProblemProvider,
    build_problem,
    classes_mask,
    identification_error,
    one_hot_tensor,
    problem_kinds,
)


def test_one_hot_and_classes_mask_use_row_major_pixels():
    values = one_hot_tensor(3, 2)
    assert values[1, 1, 0] == 1.0 and values.sum() == 4.0
    mask = classes_mask(3, 2)[:, :, 0]
    assert mask.tolist() == [[1.0, 1.0], [1.0, 0.0]]


def test_identification_error_ignores_diverged_values():
    result = np.array([[1.0, -1.0, 1e30, 0.0]])
    assert identification_error(result) == pytest.approx(0.5)


def test_constant_problem_builds_data_from_network_widths():
    problem = ConstantProblem(seed=3)
    problem.init({"inputWidth": 4, "outputWidth": 2})
    sample = problem.generate_trainingSample(0)
    assert sample.input.width == 4 and sample.expected.width == 2
    assert problem.needs_testSubstractExpectedTexture()
    assert problem.get_evaluationType() == "MINERROR"
    evaluation = problem.evaluate_test(np.zeros((4, 4)))
    assert evaluation.success and evaluation.error == 0.0


def test_classification_evaluation_is_argmax_of_channel_mean():
    problem = PatternClassificationProblem(classes_count=3, seed=0, tests_count=6)
    problem.init({"inputWidth": 4, "outputWidth": 2})
    sample = problem.generate_testingSample(4)
    assert sample.expected_class_index == 1
    result = np.zeros((3, 4))
    result[1] = [0.1, 0.9, 0.9, 0.9]
    result[2] = [1.0, 0.0, 0.0, 0.0]
    assert problem.evaluate_test(result).success
    result[2] = 1.0
    assert not problem.evaluate_test(result).success


def test_classification_test_samples_are_deterministic():
    first = PatternClassificationProblem(classes_count=4, seed=5)
    second = PatternClassificationProblem(classes_count=4, seed=5)
    for problem in (first, second):
        problem.init({"inputWidth": 4, "outputWidth": 2})
    a, b = first.generate_testingSample(7), second.generate_testingSample(7)
    assert np.array_equal(a.input.read(), b.input.read())


def test_classification_rejects_too_many_classes():
    problem = PatternClassificationProblem(classes_count=5)
    with pytest.raises(ValueError):
        problem.init({"inputWidth": 4, "outputWidth": 2})
    with pytest.raises(ValueError):
        PatternClassificationProblem(classes_count=1)


def test_pool_reuses_samples():
    problem = PooledProblemProvider(ConstantProblem(seed=0), size=1, usage_count=3)
    problem.init({"inputWidth": 2, "outputWidth": 2})
    samples = [problem.generate_trainingSample(i) for i in range(6)]
    assert problem.generated_count == 2
    assert samples[0] is samples[2]
    assert samples[2] is not samples[3]


def test_pool_rejects_dynamic_delta_masks():
    class Dynamic(ConstantProblem):
        def compute_deltaMaskFromNNOutput(self, output):
            return output

    with pytest.raises(ValueError):
        PooledProblemProvider(Dynamic())


def test_build_problem():
    assert problem_kinds() == ["classification", "identification"]
    provider = build_problem({"kind": "classification", "classes_count": 2, "pool": {"size": 4, "usageCount": 2}})
    assert isinstance(provider, PooledProblemProvider)
    assert provider.get_evaluationType() == "MAXSUCCESSRATE"
    with pytest.raises(ValueError):
        build_problem({"kind": "segmentation"})


def test_sample_evaluation_from_mapping():
    evaluation = SampleEvaluation.from_mapping({"isConsider": False, "success": 0.5})
    assert not evaluation.is_consider
    assert evaluation.error == float("-inf")
    assert Sample(input=None, expected=None).delta_mask is None
