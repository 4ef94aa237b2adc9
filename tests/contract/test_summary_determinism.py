import json
from pathlib import Path

from microtrain.training import pipelines


def test_summary_outputs_are_deterministic(tmp_path):
    config = pipelines.load_preset("constant_direct")
    config["trainer"]["stopAfterMinibatchsCount"] = 60
    config["run"]["run_dir"] = str(tmp_path / "run_a")

    first = pipelines.run_pipeline(config)
    summary_a = Path(first.summary_path).read_bytes()
    metrics_a = Path(first.metrics_path).read_bytes()
    export_a = Path(first.export_path).read_text()

    config["run"]["run_dir"] = str(tmp_path / "run_b")
    second = pipelines.run_pipeline(config)

    assert Path(second.metrics_path).read_bytes() == metrics_a
    assert Path(second.summary_path).read_bytes() == summary_a
    # training infos carry timestamps, the weights must match
    doc_a = json.loads(export_a)
    doc_b = json.loads(Path(second.export_path).read_text())
    assert doc_a["layers"] == doc_b["layers"]
