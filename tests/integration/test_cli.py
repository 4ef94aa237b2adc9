import json
from pathlib import Path

import pytest

from cli.main import main


def test_cli_constant_preset(tmp_path, capsys):
    run_dir = tmp_path / "run"
    main(["--preset", "constant_direct", "--run-dir", str(run_dir), "--minibatchs", "40"])
    lines = capsys.readouterr().out.strip().splitlines()
    payload = json.loads(lines[-1])
    assert payload["steps"] == 40
    assert payload["state"] == "finished"
    assert (run_dir / "metrics_test.jsonl").exists()
    assert (run_dir / "manifest.json").exists()
    assert Path(payload["export"]).exists()


def test_cli_lists_presets(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--list-presets"])
    assert excinfo.value.code == 0
    names = capsys.readouterr().out.split()
    assert {"classification_full", "classification_square", "constant_direct"} <= set(names)


def test_cli_overrides_and_dump(tmp_path):
    override = tmp_path / "override.json"
    override.write_text(json.dumps({"trainer": {"testMinibatchsInterval": 10}}))
    dump = tmp_path / "resolved.json"
    main(
        [
            "--config",
            str(override),
            "--run-dir",
            str(tmp_path / "run"),
            "--minibatchs",
            "30",
            "--seed",
            "5",
            "--no-export",
            "--dump-config",
            str(dump),
        ]
    )
    config = json.loads(dump.read_text())
    assert config["seed"] == 5
    assert config["trainer"]["testMinibatchsInterval"] == 10
    assert config["trainer"]["stopAfterMinibatchsCount"] == 30
    assert config["run"]["export"] is False
    assert not (tmp_path / "run" / "network.json").exists()
    records = (tmp_path / "run" / "metrics_test.jsonl").read_text().splitlines()
    assert len(records) == 3
