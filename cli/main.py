"""Command line entry point for microtrain runs."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Iterable

from microtrain.training import pipelines


def _format_result(result) -> str:
    payload = {
        "steps": result.steps,
        "state": result.state,
        "metrics": result.metrics_path,
        "manifest": result.manifest_path,
    }
    if result.summary_path:
        payload["summary"] = result.summary_path
    if result.export_path:
        payload["export"] = result.export_path
    if result.best_result:
        payload["best"] = {
            "successRate": result.best_result["successRate"],
            "error": result.best_result["error"],
        }
    return json.dumps(payload, sort_keys=True)


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    preset_names = sorted(pipelines.presets().keys())
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--preset",
        choices=preset_names,
        default="constant_direct",
        help="Preset configuration to execute",
    )
    parser.add_argument("--config", type=Path, help="Optional JSON/YAML config override")
    parser.add_argument("--run-dir", help="Directory receiving metrics, manifest and export")
    parser.add_argument("--seed", type=int, help="Seed of the engine context and the problem")
    parser.add_argument(
        "--minibatchs",
        type=int,
        help="Override trainer.stopAfterMinibatchsCount",
    )
    parser.add_argument("--export", type=Path, help="Write the trained network to this JSON file")
    parser.add_argument(
        "--no-export",
        action="store_true",
        help="Skip writing the trained network",
    )
    parser.add_argument(
        "--compress",
        type=int,
        metavar="BITS",
        help="Quantise exported weights on BITS bits (1..16)",
    )
    parser.add_argument("--enable-plots", action="store_true", help="Render learning curves")
    parser.add_argument("--display", action="store_true", help="Print one line per test cycle")
    parser.add_argument("--list-presets", action="store_true", help="List available presets and exit")
    parser.add_argument("--dump-config", type=Path, help="Dump the resolved config to a JSON file")
    return parser.parse_args(argv)


def _load_override(path: Path) -> dict:
    text = path.read_text()
    if path.suffix in {".yml", ".yaml"}:
        try:
            import yaml  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("PyYAML is required to load YAML configs") from exc
        return yaml.safe_load(text) or {}
    return json.loads(text)


def _merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(dict(base[key]), value)
        else:
            base[key] = value
    return base


def resolve_config(args: argparse.Namespace) -> dict:
    config = json.loads(json.dumps(pipelines.load_preset(args.preset)))

    if args.config:
        override = _load_override(args.config)
        if {"network", "problem", "trainer"} <= set(override.keys()):
            config = json.loads(json.dumps(override))
        else:
            config = _merge(config, override)

    run_cfg = config.setdefault("run", {})
    trainer_cfg = config.setdefault("trainer", {})
    if args.run_dir:
        run_cfg["run_dir"] = args.run_dir
    if args.seed is not None:
        config["seed"] = int(args.seed)
        config.setdefault("problem", {})["seed"] = int(args.seed)
    if args.minibatchs is not None:
        trainer_cfg["stopAfterMinibatchsCount"] = int(args.minibatchs)
    if args.enable_plots:
        run_cfg["enable_plots"] = True
    if args.display:
        trainer_cfg["display"] = True
        trainer_cfg["enableUI"] = True
    if args.export:
        run_cfg["export_path"] = str(args.export)
    if args.no_export:
        run_cfg["export"] = False
    if args.compress is not None:
        run_cfg["compress"] = int(args.compress)
    return config


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)

    if args.list_presets:
        for name in sorted(pipelines.presets().keys()):
            print(name)
        raise SystemExit(0)

    config = resolve_config(args)

    if args.dump_config:
        args.dump_config.parent.mkdir(parents=True, exist_ok=True)
        args.dump_config.write_text(json.dumps(config, indent=2))

    result = pipelines.run_pipeline(config)
    print(_format_result(result))


if __name__ == "__main__":
    main()
