"""
serialization.py
~~~~~~~~~~~~~~~~

Line-oriented text format for saved networks.

One token per line, in this order:

1. number of layers
2. the size of every layer, input first
3. the activation name of every hidden layer
4. the activation name of the output layer
5. every weight, connection by connection, row-major
6. every bias, connection by connection

Weights and biases are written as hexadecimal floats (``float.hex``), which
round-trip every 64-bit value exactly. The output activation is always
written; older files that only recorded it when it was ``softmax`` are
rejected with a :class:`~ffnet.errors.FormatError` rather than guessed at.
"""

import logging
import re
from typing import IO, Iterator, List, Tuple

import numpy as np

from ffnet.activations import Activation
from ffnet.errors import FormatError, InvariantViolation, NetworkIOError
from ffnet.network import Network, create_network

logger = logging.getLogger(__name__)

END_OF_FILE = '<end of file>'

# float.fromhex also takes bare digits ('1.5' reads as hex), so demand the prefix
HEX_FLOAT = re.compile(r'^[+-]?(0x[0-9a-f.]+(p[+-]?\d+)?|inf(inity)?|nan)$', re.IGNORECASE)
INTEGER = re.compile(r'^[0-9]+$')


def _format_lines(network: Network) -> Iterator[str]:
    yield str(network.num_layers)
    for layer in network.layers:
        yield str(layer.size)
    for layer in network.layers[1:]:
        yield layer.activation.value

    # serialize weights in row-major ordering
    for con in network.connections:
        for value in con.weights.ravel(order='C'):
            yield float(value).hex()

    for con in network.connections:
        for value in con.bias.ravel(order='C'):
            yield float(value).hex()


def dumps(network: Network) -> str:
    """Serialize a network to text."""
    if network.destroyed:
        raise InvariantViolation("Cannot serialize a destroyed network")
    return ''.join(f"{line}\n" for line in _format_lines(network))


def dump(network: Network, fp: IO[str]) -> None:
    """Serialize a network to an open text file."""
    fp.write(dumps(network))


def save_network(network: Network, path: str) -> None:
    """
    Write a network to ``path``, replacing any existing file.

    Raises:
        NetworkIOError: If the file cannot be written
    """
    text = dumps(network)
    try:
        with open(path, 'w', encoding='ascii') as fp:
            fp.write(text)
    except OSError as e:
        raise NetworkIOError(path, str(e)) from e

    logger.info(f"Saved network with sizes {network.sizes} to {path}")


class _TokenReader:
    """Yields stripped lines and remembers where it is, for error messages."""

    def __init__(self, text: str, path: str = None):
        self.lines = text.splitlines()
        self.position = 0
        self.path = path

    @property
    def remaining(self) -> int:
        return len(self.lines) - self.position

    def next(self, expected: str) -> str:
        if self.position >= len(self.lines):
            raise self.error(expected, END_OF_FILE, line=len(self.lines) + 1)
        token = self.lines[self.position].strip()
        self.position += 1
        return token

    def error(self, expected: str, found: str, line: int = None) -> FormatError:
        return FormatError(
            line if line is not None else self.position,
            expected,
            found,
            path=self.path
        )

    def read_int(self, expected: str) -> int:
        token = self.next(expected)
        if not INTEGER.match(token):
            raise self.error(expected, token)
        return int(token)

    def read_float(self, expected: str) -> float:
        token = self.next(expected)
        if not HEX_FLOAT.match(token):
            raise self.error(expected, token)
        try:
            return float.fromhex(token)
        except (ValueError, OverflowError):
            raise self.error(expected, token) from None

    def read_activation(self, expected: str) -> Activation:
        token = self.next(expected)
        try:
            return Activation.from_name(token)
        except ValueError:
            if _looks_like_number(token):
                # legacy files omit the output token unless it is softmax
                expected = f"{expected} (file may predate mandatory output activation)"
            raise self.error(expected, token) from None

    def check_exhausted(self) -> None:
        while self.position < len(self.lines):
            token = self.lines[self.position].strip()
            self.position += 1
            if token:
                raise self.error(END_OF_FILE, token)


def _looks_like_number(token: str) -> bool:
    return HEX_FLOAT.match(token) is not None


def _parse_header(reader: _TokenReader) -> Tuple[List[int], List[Activation]]:
    num_layers = reader.read_int("layer count")
    if num_layers < 2:
        raise reader.error("layer count of at least 2", str(num_layers))

    sizes = []
    for i in range(num_layers):
        size = reader.read_int(f"size of layer {i}")
        if size <= 0:
            raise reader.error(f"positive size of layer {i}", str(size))
        sizes.append(size)

    funcs = []
    for i in range(1, num_layers):
        kind = "output" if i == num_layers - 1 else "hidden"
        funcs.append(reader.read_activation(f"{kind} activation of layer {i}"))
    return sizes, funcs


def loads(text: str, path: str = None) -> Network:
    """
    Rebuild a network from text produced by :func:`dumps`.

    Args:
        text: Serialized network
        path: File name used in error messages

    Returns:
        Network: The reconstructed network

    Raises:
        FormatError: If the text is malformed or truncated
    """
    reader = _TokenReader(text, path)
    sizes, funcs = _parse_header(reader)

    num_values = sum(sizes[i] * sizes[i + 1] for i in range(len(sizes) - 1))
    num_values += sum(sizes[1:])
    if reader.remaining < num_values:
        raise reader.error(
            f"{num_values} weight and bias values",
            f"{reader.remaining} remaining lines",
            line=len(reader.lines) + 1
        )

    network = create_network(
        sizes[0],
        sizes[1:-1],
        funcs[:-1],
        sizes[-1],
        funcs[-1]
    )

    for k, con in enumerate(network.connections):
        weights = np.empty(con.weights.shape)
        for i in range(weights.shape[0]):
            for j in range(weights.shape[1]):
                weights[i, j] = reader.read_float(
                    f"hex float weight [{i}][{j}] of connection {k}"
                )
        con.weights = weights

    for k, con in enumerate(network.connections):
        bias = np.empty(con.bias.shape)
        for i in range(bias.shape[1]):
            bias[0, i] = reader.read_float(f"hex float bias [{i}] of connection {k}")
        con.bias = bias

    reader.check_exhausted()
    network.check_invariants()
    return network


def load(fp: IO[str], path: str = None) -> Network:
    """Read a network from an open text file."""
    return loads(fp.read(), path=path)


def read_network(path: str) -> Network:
    """
    Read a network file written by :func:`save_network`.

    Raises:
        NetworkIOError: If the file cannot be opened
        FormatError: If its contents are not ASCII or are malformed
    """
    try:
        with open(path, 'rb') as fp:
            raw = fp.read()
    except OSError as e:
        raise NetworkIOError(path, str(e)) from e

    try:
        text = raw.decode('ascii')
    except UnicodeDecodeError as e:
        line = raw[:e.start].count(b'\n') + 1
        raise FormatError(line, "ASCII text", repr(raw[e.start:e.end]), path=path) from e

    network = loads(text, path=path)
    logger.info(f"Read network with sizes {network.sizes} from {path}")
    return network
