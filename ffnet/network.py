"""
network.py
~~~~~~~~~~

A fully-connected feedforward network: an Input layer, any number of Hidden
layers and an Output layer, linked consecutively by weight/bias connections.

The forward pass does not return its result. It replaces every layer's
activation buffer, and the output lives in the last layer until the next
pass. :func:`predict` reads that cached state, so callers must run
:func:`forward_pass` first. Each network carries a re-entrant lock; hold
``network.lock`` around a pass and the reads that depend on it when the
network is shared between threads.
"""

import logging
import threading
from typing import List, Optional, Sequence, Union

import numpy as np

from ffnet.activations import Activation
from ffnet.errors import InvariantViolation
from ffnet.layer import Connection, Layer, LayerKind

logger = logging.getLogger(__name__)

ActivationLike = Union[Activation, str]

# Smallest positive normal double; log() of anything below is clamped to it
EPSILON = np.finfo(np.float64).tiny


class Network:
    """
    Ordered pipeline of layers and the connections between them.

    Build instances with :func:`create_network`; the constructor only wires
    already-built layers together.
    """

    def __init__(self, layers: List[Layer]):
        if len(layers) < 2:
            raise InvariantViolation(
                f"A network needs at least 2 layers, got {len(layers)}"
            )
        self.layers = layers
        self.connections = [
            Connection(layers[i], layers[i + 1])
            for i in range(len(layers) - 1)
        ]
        self.lock = threading.RLock()
        self._destroyed = False
        self.check_invariants()

    @property
    def num_layers(self) -> int:
        return len(self.layers)

    @property
    def num_connections(self) -> int:
        return len(self.connections)

    @property
    def num_hidden_layers(self) -> int:
        return len(self.layers) - 2

    @property
    def input_layer(self) -> Layer:
        return self.layers[0]

    @property
    def output_layer(self) -> Layer:
        return self.layers[-1]

    @property
    def num_features(self) -> int:
        return self.layers[0].size

    @property
    def num_classes(self) -> int:
        return self.layers[-1].size

    @property
    def sizes(self) -> List[int]:
        """Layer sizes in pipeline order."""
        return [layer.size for layer in self.layers]

    @property
    def activations(self) -> List[str]:
        """Activation names of every non-input layer, in pipeline order."""
        return [layer.activation.value for layer in self.layers[1:]]

    @property
    def output(self) -> np.ndarray:
        """The output layer's current activation buffer."""
        self._ensure_alive()
        return self.output_layer.current_activation

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def check_invariants(self) -> None:
        """
        Verify the layer kinds, connection wiring and matrix shapes.

        Raises:
            InvariantViolation: On the first mismatch found
        """
        self._ensure_alive()
        if self.layers[0].kind is not LayerKind.INPUT:
            raise InvariantViolation("First layer must be an input layer")
        if self.layers[-1].kind is not LayerKind.OUTPUT:
            raise InvariantViolation("Last layer must be an output layer")
        for layer in self.layers[1:-1]:
            if layer.kind is not LayerKind.HIDDEN:
                raise InvariantViolation(
                    f"Interior layers must be hidden, found {layer.kind.value}"
                )

        if len(self.connections) != len(self.layers) - 1:
            raise InvariantViolation(
                f"{len(self.layers)} layers need {len(self.layers) - 1} "
                f"connections, found {len(self.connections)}"
            )
        for i, con in enumerate(self.connections):
            if con.from_layer is not self.layers[i] or con.to_layer is not self.layers[i + 1]:
                raise InvariantViolation(f"Connection {i} is not wired to layers {i}, {i + 1}")
            expected = (self.layers[i].size, self.layers[i + 1].size)
            if con.weights.shape != expected:
                raise InvariantViolation(
                    f"Connection {i} weights have shape {con.weights.shape}, "
                    f"expected {expected}"
                )
            if con.bias.shape != (1, expected[1]):
                raise InvariantViolation(
                    f"Connection {i} bias has shape {con.bias.shape}, "
                    f"expected {(1, expected[1])}"
                )

    def initialize(self, rng: Optional[np.random.Generator] = None) -> None:
        """Randomly initialize every connection."""
        for con in self.connections:
            con.initialize(rng)

    def forward_pass(self, inputs: np.ndarray) -> None:
        forward_pass(self, inputs)

    def infer(self, inputs: np.ndarray) -> np.ndarray:
        """
        Run a forward pass and return a copy of the output.

        Unlike :meth:`forward_pass`, the returned matrix belongs to the
        caller and is unaffected by later passes.
        """
        with self.lock:
            forward_pass(self, inputs)
            return self.output.copy()

    def predict(self) -> List[int]:
        return predict(self)

    def accuracy(self, data: np.ndarray, classes: np.ndarray) -> float:
        return accuracy(self, data, classes)

    def loss(
        self,
        prediction: np.ndarray,
        actual: np.ndarray,
        regularization_strength: float = 0.0
    ) -> float:
        """Cross-entropy loss including this network's L2 penalty."""
        return cross_entropy_loss(
            prediction, actual, regularization_strength, network=self
        )

    def squared_weight_sum(self) -> float:
        """Sum of squared weights over every connection (bias excluded)."""
        with self.lock:
            self._ensure_alive()
            return float(sum(np.sum(con.weights ** 2) for con in self.connections))

    def destroy(self) -> None:
        """
        Release connections, then layers.

        Safe to call more than once. The network cannot be used afterwards.
        """
        with self.lock:
            if self._destroyed:
                return
            for con in self.connections:
                con.release()
            for layer in self.layers:
                layer.release()
            self.connections = []
            self.layers = []
            self._destroyed = True
        logger.debug("Destroyed network")

    def _ensure_alive(self) -> None:
        if self._destroyed:
            raise InvariantViolation("Network has been destroyed")

    def __enter__(self) -> 'Network':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()

    def __repr__(self) -> str:
        if self._destroyed:
            return "Network(<destroyed>)"
        return f"Network(sizes={self.sizes}, activations={self.activations})"


def create_network(
    num_features: int,
    hidden_sizes: Sequence[int],
    hidden_activations: Sequence[ActivationLike],
    num_classes: int,
    output_activation: ActivationLike,
    rng: Optional[np.random.Generator] = None
) -> Network:
    """
    Build a network and randomly initialize its weights and biases.

    Args:
        num_features: Size of the input layer
        hidden_sizes: Size of each hidden layer, in order (may be empty)
        hidden_activations: Activation of each hidden layer, parallel to
            ``hidden_sizes``; members of :class:`Activation` or their names
        num_classes: Size of the output layer
        output_activation: Activation of the output layer
        rng: Generator used for initialization, for reproducible networks

    Returns:
        Network: A network with ``len(hidden_sizes) + 2`` layers

    Raises:
        InvariantViolation: If a size is not positive, the hidden lists
            differ in length or an activation name is unknown

    Example:
        >>> net = create_network(784, [30], ['sigmoid'], 10, 'softmax')
        >>> net.sizes
        [784, 30, 10]
    """
    if num_features <= 0 or num_classes <= 0:
        raise InvariantViolation(
            f"num_features and num_classes must be positive, "
            f"got {num_features} and {num_classes}"
        )
    if len(hidden_sizes) != len(hidden_activations):
        raise InvariantViolation(
            f"Got {len(hidden_sizes)} hidden sizes but "
            f"{len(hidden_activations)} hidden activations"
        )

    try:
        hidden_funcs = [Activation.coerce(a) for a in hidden_activations]
        output_func = Activation.coerce(output_activation)
    except ValueError as e:
        raise InvariantViolation(str(e)) from e

    layers = [Layer(LayerKind.INPUT, num_features)]
    for size, func in zip(hidden_sizes, hidden_funcs):
        layers.append(Layer(LayerKind.HIDDEN, int(size), func))
    layers.append(Layer(LayerKind.OUTPUT, num_classes, output_func))

    network = Network(layers)
    network.initialize(rng)

    logger.info(
        f"Created network with sizes {network.sizes} "
        f"and activations {network.activations}"
    )
    return network


def forward_pass(network: Network, inputs: np.ndarray) -> None:
    """
    Propagate a batch through the whole network.

    The input layer takes its own copy of ``inputs``; every later layer's
    buffer is replaced in pipeline order. The result is left in
    ``network.output``.

    Args:
        network: Network to run
        inputs: Matrix of shape [batch x num_features], one example per row

    Raises:
        InvariantViolation: If ``inputs`` is not 2-D or has the wrong
            number of columns
    """
    inputs = np.asarray(inputs, dtype=np.float64)

    with network.lock:
        network._ensure_alive()
        if inputs.ndim != 2 or inputs.shape[1] != network.num_features:
            raise InvariantViolation(
                f"Input must have shape [batch x {network.num_features}], "
                f"got {inputs.shape}"
            )
        network.input_layer.set_activation_buffer(inputs.copy())
        for con in network.connections:
            con.propagate()


def cross_entropy_loss(
    prediction: np.ndarray,
    actual: np.ndarray,
    regularization_strength: float = 0.0,
    network: Optional[Network] = None
) -> float:
    """
    Mean cross-entropy between predicted and true class distributions.

    Args:
        prediction: Predicted probabilities, [batch x num_classes]
        actual: One-hot or soft labels, same shape as ``prediction``
        regularization_strength: Multiplier of the L2 weight penalty
        network: When given, adds
            ``regularization_strength * 0.5 * sum(weights ** 2)``

    Returns:
        float: The loss
    """
    prediction = np.asarray(prediction, dtype=np.float64)
    actual = np.asarray(actual, dtype=np.float64)
    if prediction.ndim != 2 or prediction.shape != actual.shape:
        raise InvariantViolation(
            f"Prediction shape {prediction.shape} does not match "
            f"label shape {actual.shape}"
        )
    if prediction.shape[0] == 0:
        raise InvariantViolation("Cannot compute loss of an empty batch")

    total = np.sum(actual * np.log(np.maximum(EPSILON, prediction)))
    loss = (-1.0 / actual.shape[0]) * total

    if network is not None:
        loss += regularization_strength * 0.5 * network.squared_weight_sum()
    return float(loss)


def predict(network: Network) -> List[int]:
    """
    Index of the highest-scoring class for each example of the last pass.

    Ties resolve to the lowest index.
    """
    with network.lock:
        output = network.output
        return [int(i) for i in np.argmax(output, axis=1)]


def accuracy(network: Network, data: np.ndarray, classes: np.ndarray) -> float:
    """
    Fraction of examples whose predicted class is marked 1 in ``classes``.

    Runs a forward pass on ``data``, so the network's cached output is
    replaced.

    Args:
        network: Network to evaluate
        data: Inputs, [batch x num_features]
        classes: One-hot labels, [batch x num_classes]

    Returns:
        float: Accuracy between 0.0 and 1.0
    """
    data = np.asarray(data, dtype=np.float64)
    classes = np.asarray(classes, dtype=np.float64)
    if data.ndim != 2 or classes.ndim != 2 or data.shape[0] != classes.shape[0]:
        raise InvariantViolation(
            f"Data shape {data.shape} and label shape {classes.shape} "
            f"must have the same number of rows"
        )
    if data.shape[0] == 0:
        raise InvariantViolation("Cannot compute accuracy of an empty batch")

    with network.lock:
        network._ensure_alive()
        if classes.shape[1] != network.num_classes:
            raise InvariantViolation(
                f"Labels must have {network.num_classes} columns, "
                f"got {classes.shape[1]}"
            )
        forward_pass(network, data)
        predictions = predict(network)

    rows = np.arange(len(predictions))
    num_correct = int(np.sum(classes[rows, predictions] == 1))
    return num_correct / classes.shape[0]


def destroy_network(network: Network) -> None:
    """Free a network's connections and layers."""
    network.destroy()
