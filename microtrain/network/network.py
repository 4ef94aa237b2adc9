"""Layer arena: an input layer followed by neuron layers addressed by index."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from ..core.context import TrainerContext
from ..core.tensor import TensorBuffer
from ..core.types import Array
from .layers import InputLayer, LayerSpec, NeuronLayer, spec_from_export


class Network:
    """Ordered chain of layers; index ``0`` is always the :class:`InputLayer`.

    ``layers`` holds the input layer description followed by one description per
    neuron layer. ``backups`` optionally holds exported layer records (same order)
    from which topology and weights are restored.
    """

    def __init__(
        self,
        layers: Sequence[Mapping[str, Any] | LayerSpec],
        context: TrainerContext,
        *,
        export_data: Mapping[str, Any] | None = None,
        backups: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        if len(layers) < 2:
            raise ValueError(f"A network needs an input layer and at least one neuron layer, got {len(layers)}")
        if backups is not None and len(backups) != len(layers):
            raise ValueError(f"Got {len(backups)} saved layers for {len(layers)} layers")
        self.context = context
        self.export_data = dict(export_data or {})
        self.layers: List[Any] = []
        self.build_layers(layers, backups)

    @classmethod
    def from_export(cls, doc: Mapping[str, Any], context: TrainerContext) -> "Network":
        records = doc["layers"]
        specs: List[Any] = [records[0]] + [spec_from_export(record) for record in records[1:]]
        return cls(specs, context, export_data=doc.get("exportData"), backups=records)

    def build_layers(
        self,
        layers: Sequence[Mapping[str, Any] | LayerSpec],
        backups: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        count = len(layers)
        input_spec = layers[0]
        if isinstance(input_spec, LayerSpec):
            raise ValueError("The first layer must describe the input layer")
        self.layers = [InputLayer.from_mapping(input_spec, self.context)]
        for index in range(1, count):
            backup = backups[index] if backups is not None else None
            layer = NeuronLayer(
                layers[index],
                index,
                self.context,
                is_output=index == count - 1,
                backup=backup,
            )
            previous = self.layers[index - 1]
            layer.link(previous.get_outputSize(), previous.kernels_count)
            self.layers.append(layer)
        for index in range(1, count - 1):
            self.layers[index].set_next(self.layers[index + 1].kind)
        self.output_layer.set_next(None)

    # ------------------------------------------------------------------
    # Accessors

    @property
    def input_layer(self) -> InputLayer:
        return self.layers[0]

    @property
    def output_layer(self) -> NeuronLayer:
        return self.layers[-1]

    def get_numberLayers(self) -> int:
        return len(self.layers)

    def get_inputWidth(self) -> int:
        return self.input_layer.get_width()

    def get_outputWidth(self) -> int:
        return self.output_layer.get_width()

    def get_outputTexture(self) -> TensorBuffer | None:
        return self.output_layer.get_output()

    def get_layerSizes(self) -> List[int]:
        """Layer sizes from the output layer back to the input layer."""

        return [layer.get_width() for layer in reversed(self.layers)]

    def get_maxLayerSize(self) -> int:
        return max(layer.get_width() for layer in self.layers)

    def get_classesCount(self) -> int:
        return self.output_layer.classes_count

    # ------------------------------------------------------------------
    # Processing

    def build_output(self) -> None:
        self.output_layer.setup_output()

    def build_backPropagation(self) -> None:
        for layer in reversed(self.layers[1:]):
            layer.build_backPropagation()

    def set_SGDMomentum(self, momentum: float) -> None:
        for layer in self.layers[1:]:
            layer.set_SGDMomentum(momentum)

    def reset_momentum(self) -> None:
        for layer in self.layers[1:]:
            layer.reset_momentum()

    def process_feedforward(
        self,
        inputs: TensorBuffer,
        want_result: bool = False,
        expected: TensorBuffer | None = None,
        clamp_mask: TensorBuffer | None = None,
    ) -> TensorBuffer | Array:
        result = self.input_layer.process_feedforward(inputs)
        for layer in self.layers[1:]:
            result = layer.process_feedforward(result, want_result, expected, clamp_mask)
        return result

    def process_backpropagation(
        self,
        expected: TensorBuffer,
        delta_masks: Sequence[TensorBuffer | None] | None,
        cost_kernel: str,
    ) -> None:
        """Backpropagate from the output layer; ``delta_masks[0]`` is the output layer mask."""

        count = len(self.layers)
        for index in range(count - 1, 0, -1):
            from_output = count - 1 - index
            mask = delta_masks[from_output] if delta_masks and len(delta_masks) > from_output else None
            downstream = self.layers[index + 1] if index < count - 1 else None
            self.layers[index].process_backpropagation(expected, mask, cost_kernel, downstream)

    def process_learning(
        self,
        rates: Sequence[float],
        l2_decays: Sequence[float],
        learning_masks: Sequence[TensorBuffer | None] | None = None,
    ) -> None:
        count = len(self.layers)
        for index in range(1, count):
            from_output = count - 1 - index
            mask = learning_masks[from_output] if learning_masks and len(learning_masks) > from_output else None
            self.layers[index].process_learning(rates[index - 1], l2_decays[index - 1], mask)

    # ------------------------------------------------------------------
    # Export

    def export_toJSON(
        self,
        problem_export_data: Mapping[str, Any] | None = None,
        trainer_data: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        export_data = dict(problem_export_data or {})
        export_data.update(self.export_data)
        doc: Dict[str, Any] = {
            "type": "RGBA",
            "layers": [layer.export_toJSON() for layer in self.layers],
            "exportData": export_data,
        }
        doc.update(trainer_data or {})
        return doc


__all__ = ["Network"]
