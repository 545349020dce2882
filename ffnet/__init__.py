"""
ffnet package
~~~~~~~~~~~~~

Fully-connected feedforward network inference package.
Contains the network topology and forward pass, loss and accuracy scoring,
the hexadecimal text serialization format, the SQLite model store and the
API server.
"""

from ffnet.activations import Activation
from ffnet.errors import (
    NetworkError,
    InvariantViolation,
    FormatError,
    NetworkIOError
)
from ffnet.layer import LayerKind, Layer, Connection
from ffnet.network import (
    Network,
    create_network,
    forward_pass,
    cross_entropy_loss,
    predict,
    accuracy,
    destroy_network
)
from ffnet.serialization import dump, dumps, load, loads, save_network, read_network

__version__ = "1.0.0"
