"""microtrain public API."""

from .core import activations  # noqa: F401
from .core import quant  # noqa: F401
from .core import types  # noqa: F401
from .core.context import TrainerContext
from .network.network import Network
from .serialization import compress, decompress, export_network, import_network
from .training.pipelines import load_preset, presets, run_pipeline
from .training.problems import build_problem
from .training.trainer import Trainer, TrainerOptions, TrainerState

__all__ = [
    "Network",
    "Trainer",
    "TrainerContext",
    "TrainerOptions",
    "TrainerState",
    "activations",
    "build_problem",
    "compress",
    "decompress",
    "export_network",
    "import_network",
    "load_preset",
    "presets",
    "quant",
    "run_pipeline",
    "types",
]
