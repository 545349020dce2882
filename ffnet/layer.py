"""
layer.py
~~~~~~~~

Layers and the connections that link adjacent layers.

A :class:`Layer` owns exactly one activation buffer, which is replaced
wholesale on every write. A :class:`Connection` owns its weight matrix and
bias row but only references its endpoint layers.
"""

from enum import Enum
from typing import Optional

import numpy as np

from ffnet.activations import Activation
from ffnet.errors import InvariantViolation


class LayerKind(Enum):
    INPUT = 'input'
    HIDDEN = 'hidden'
    OUTPUT = 'output'


class Layer:
    """
    A stage of the pipeline holding a batch of activations of fixed width.

    Attributes:
        kind: Position of the layer in the network
        size: Number of units (columns of the activation buffer)
        activation: Transform applied after the incoming connection,
            None for the input layer
    """

    def __init__(
        self,
        kind: LayerKind,
        size: int,
        activation: Optional[Activation] = None
    ):
        if size <= 0:
            raise InvariantViolation(f"Layer size must be positive, got {size}")
        if kind is LayerKind.INPUT and activation is not None:
            raise InvariantViolation("Input layer cannot have an activation")
        if kind is not LayerKind.INPUT and activation is None:
            raise InvariantViolation(f"{kind.value} layer requires an activation")

        self.kind = kind
        self.size = size
        self.activation = activation
        self._current_activation = np.zeros((1, size))

    @property
    def current_activation(self) -> np.ndarray:
        """The batch most recently written to this layer."""
        return self._current_activation

    def set_activation_buffer(self, values: np.ndarray) -> None:
        """Take ownership of a new buffer, dropping the previous one."""
        if values.ndim != 2 or values.shape[1] != self.size:
            raise InvariantViolation(
                f"{self.kind.value} layer of size {self.size} cannot hold "
                f"a matrix of shape {values.shape}"
            )
        self._current_activation = values

    def activate(self, preactivation: np.ndarray) -> None:
        """Apply this layer's activation and store the result."""
        if self.activation is None:
            raise InvariantViolation("Input layer has no activation to apply")
        self.set_activation_buffer(self.activation.apply(preactivation))

    def release(self) -> None:
        self._current_activation = None

    def __repr__(self) -> str:
        name = self.activation.value if self.activation else None
        return f"Layer({self.kind.value}, size={self.size}, activation={name})"


class Connection:
    """
    Weights and bias linking two adjacent layers.

    ``weights`` has shape [from_layer.size x to_layer.size] and ``bias``
    has shape [1 x to_layer.size].
    """

    def __init__(self, from_layer: Layer, to_layer: Layer):
        self.from_layer = from_layer
        self.to_layer = to_layer
        self.weights = np.zeros((from_layer.size, to_layer.size))
        self.bias = np.zeros((1, to_layer.size))

    def initialize(self, rng: Optional[np.random.Generator] = None) -> None:
        """
        Draw random weights and bias.

        Weights are standard normal scaled by 1/sqrt(fan-in) so a layer's
        pre-activations keep roughly unit variance; bias is standard normal.
        """
        if rng is None:
            rng = np.random.default_rng()
        fan_in = self.from_layer.size
        self.weights = rng.standard_normal(self.weights.shape) / np.sqrt(fan_in)
        self.bias = rng.standard_normal(self.bias.shape)

    def propagate(self) -> None:
        """Push the source layer's activations into the target layer."""
        preactivation = self.from_layer.current_activation @ self.weights + self.bias
        self.to_layer.activate(preactivation)

    def release(self) -> None:
        self.weights = None
        self.bias = None

    def __repr__(self) -> str:
        return f"Connection({self.from_layer.size} -> {self.to_layer.size})"
