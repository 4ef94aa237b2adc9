"""Layers and the layer arena."""

from .layers import InputLayer, LayerSpec, NeuronLayer
from .maxpooling import MaxPooling
from .network import Network

__all__ = ["InputLayer", "LayerSpec", "MaxPooling", "Network", "NeuronLayer"]
