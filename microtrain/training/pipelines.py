"""Pipeline assembly: presets, network/problem/trainer wiring and run artifacts."""

from __future__ import annotations

import json
import time
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from ..core.context import TrainerContext
from ..core.types import RunResult
from ..network.network import Network
from ..reporting.artifacts import write_manifest
from ..reporting.metrics import CsvSink, JsonlSink
from ..reporting.plots import PlotAdapter
from ..reporting.summary import write_summary
from ..serialization import save_json
from .problems import build_problem
from .trainer import Trainer, TrainerOptions

_PRESETS: Dict[str, Mapping[str, object]] = {
    "constant_direct": {
        "seed": 0,
        "network": {
            "layers": [
                {"size": 4, "preprocessing": "none"},
                {"size": 4, "connectivityUp": "direct", "activation": "copy"},
            ],
        },
        "problem": {"kind": "identification", "seed": 0, "tests_count": 1},
        "trainer": {
            "enableUI": False,
            "testMinibatchsInterval": 20,
            "stopAfterMinibatchsCount": 200,
            "SGDLearningRate": 1.0,
            "SGDLearningRateFactor": 0.1,
        },
        "run": {
            "run_dir": "runs/constant-direct",
            "enable_plots": False,
            "compress": 0,
        },
    },
    "classification_full": {
        "seed": 1,
        "network": {
            "layers": [
                {"size": 8, "preprocessing": "none"},
                {"size": 8, "connectivityUp": "full", "activation": "relu"},
                {"classesCount": 4, "connectivityUp": "full", "activation": "sigmoid"},
            ],
        },
        "problem": {
            "kind": "classification",
            "classes_count": 4,
            "noise": 0.1,
            "seed": 1,
            "tests_count": 40,
            "pool": {"size": 50, "usageCount": 4},
        },
        "trainer": {
            "enableUI": False,
            "testMinibatchsInterval": 50,
            "stopAfterMinibatchsCount": 400,
            "minibatchSize": 2,
            "cost": "crossEntropy",
            "SGDLearningRate": 1.0,
            "SGDLearningRateFactor": 0.03,
            "SGDMomentum": 0.5,
            "SGDLearningRatePeriod": 2000,
        },
        "run": {
            "run_dir": "runs/classification-full",
            "enable_plots": False,
            "compress": 8,
        },
    },
}

_SECTIONS = {"network", "problem", "trainer"}
_PRESET_DIR = Path(__file__).resolve().parents[2] / "configs" / "presets"
_FILE_PRESETS_CACHE: Dict[str, Mapping[str, object]] | None = None


def _read_preset_file(path: Path) -> Mapping[str, object]:
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        try:
            import yaml  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("PyYAML is required to load preset files in YAML format") from exc
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text or "{}")
    else:
        raise ValueError(f"Unsupported preset file type: {path.suffix}")

    if not isinstance(data, Mapping):
        raise TypeError(f"Preset {path.name} must decode to a mapping")
    return data


def _file_presets() -> Dict[str, Mapping[str, object]]:
    global _FILE_PRESETS_CACHE
    if _FILE_PRESETS_CACHE is None:
        presets: Dict[str, Mapping[str, object]] = {}
        if _PRESET_DIR.exists():
            for file in sorted(_PRESET_DIR.iterdir()):
                if file.suffix.lower() not in {".yaml", ".yml", ".json"}:
                    continue
                data = _read_preset_file(file)
                missing = _SECTIONS - set(data)
                if missing:
                    missing_str = ", ".join(sorted(missing))
                    raise KeyError(f"Preset {file.name} is missing required sections: {missing_str}")
                presets[file.stem] = json.loads(json.dumps(data))
        _FILE_PRESETS_CACHE = presets
    cache = _FILE_PRESETS_CACHE or {}
    return {name: deepcopy(cfg) for name, cfg in cache.items()}


def presets() -> Mapping[str, Mapping[str, object]]:
    combined: Dict[str, Mapping[str, object]] = {}
    combined.update({name: deepcopy(cfg) for name, cfg in _PRESETS.items()})
    combined.update(_file_presets())
    return combined


def load_preset(name: str) -> Mapping[str, object]:
    file_overrides = _file_presets()
    if name in file_overrides:
        return file_overrides[name]
    try:
        return deepcopy(_PRESETS[name])
    except KeyError as exc:
        raise KeyError(f"Unknown preset: {name}") from exc


# ------------------------------------------------------------------
# Running


def build_network(config: Mapping[str, Any], context: TrainerContext) -> Network:
    network_cfg = config["network"]
    if "import" in network_cfg:
        from ..serialization import import_network, load_json

        return import_network(load_json(network_cfg["import"]), context)
    return Network(list(network_cfg["layers"]), context, export_data=network_cfg.get("exportData"))


def run_pipeline(config: Mapping[str, object]) -> RunResult:
    """Train one network as described by ``config`` and write the run artifacts."""

    missing = _SECTIONS - set(config)
    if missing:
        raise KeyError(f"Config is missing required sections: {', '.join(sorted(missing))}")
    run_cfg = dict(config.get("run", {}))  # type: ignore[arg-type]
    seed = int(config.get("seed", 0))  # type: ignore[arg-type]
    options = TrainerOptions.from_mapping(config["trainer"])  # type: ignore[arg-type]
    if options.stop_after_minibatchs_count <= 0 and options.pause_after_n_tests < 0:
        raise ValueError("A pipeline run needs stopAfterMinibatchsCount > 0 or pauseAfterNTests >= 0")

    context = TrainerContext(seed)
    network = build_network(config, context)  # type: ignore[arg-type]
    problem = build_problem(config["problem"])  # type: ignore[arg-type]

    run_dir = _resolve_run_dir(run_cfg, str(config["problem"].get("kind", "run")))  # type: ignore[union-attr]
    run_dir.mkdir(parents=True, exist_ok=True)

    _print_startup_summary(
        problem=str(config["problem"].get("kind")),  # type: ignore[union-attr]
        layer_sizes=list(reversed(network.get_layerSizes())),
        connectivities=[layer.kind.value for layer in network.layers[1:]],
        cost=options.cost,
        evaluation=problem.get_evaluationType(),
        stop=options.stop_after_minibatchs_count,
    )

    test_jsonl = JsonlSink(run_dir / "metrics_test.jsonl", split="test", seed=seed)
    test_csv = CsvSink(run_dir / "metrics_test.csv", split="test")
    train_jsonl = JsonlSink(run_dir / "metrics_train.jsonl", split="train", seed=seed)
    plots = PlotAdapter(run_dir, enable_plots=bool(run_cfg.get("enable_plots", False)))

    trainer = Trainer(
        network,
        problem,
        options,
        context=context,
        callbacks=[test_jsonl, test_csv, train_jsonl, plots],
    )
    trainer.train()
    plots.close()

    best = trainer.best_test.to_dict() if trainer.best_test is not None else None
    summary_tail = int(run_cfg.get("summary_tail", 32))
    summary_path = write_summary(test_jsonl.path, run_dir / "summary.json", tail=summary_tail, best=best)

    export_path = ""
    if run_cfg.get("export", True):
        target = run_cfg.get("export_path") or run_dir / "network.json"
        doc = trainer.export_toJSON(int(run_cfg.get("compress", 0) or 0))
        export_path = save_json(doc, target)

    manifest = write_manifest(
        run_dir / "manifest.json",
        config=json.loads(json.dumps(config)),
        network={
            "layerSizes": network.get_layerSizes(),
            "classesCount": network.get_classesCount(),
            "state": trainer.get_state().value,
        },
        dispatch=context.dispatcher.kernel_counts,
        files=[p for p in (test_jsonl.path, test_csv.path, summary_path, export_path) if p],
    )

    return RunResult(
        steps=trainer.minibatchs,
        state=trainer.get_state().value,
        metrics_path=str(test_jsonl.path),
        manifest_path=manifest,
        summary_path=summary_path,
        export_path=export_path,
        best_result=best,
    )


def _resolve_run_dir(run_cfg: Mapping[str, object], problem: str) -> Path:
    if run_cfg.get("run_dir"):
        return Path(str(run_cfg["run_dir"]))
    timestamp = time.strftime("%Y%m%d-%H%M%S")
    return Path("runs") / timestamp / problem


def _print_startup_summary(
    *,
    problem: str,
    layer_sizes: Sequence[int],
    connectivities: List[str],
    cost: str,
    evaluation: str,
    stop: int,
) -> None:
    print("=== microtrain run ===")
    print(f"Problem       : {problem}")
    print(f"Layer sizes   : {list(layer_sizes)}")
    print(f"Connectivity  : {connectivities}")
    print(f"Cost          : {cost}")
    print(f"Evaluation    : {evaluation}")
    print(f"Minibatchs    : {stop if stop else 'until pause'}")
    print("=====================")


__all__ = ["build_network", "load_preset", "presets", "run_pipeline"]
