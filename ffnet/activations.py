"""
activations.py
~~~~~~~~~~~~~~

Activation transforms applied to a layer after its connection's linear step.

Each :class:`Activation` member carries its canonical serialized name and its
transform, so the file format writes the tag directly instead of guessing
which function a layer happens to hold.
"""

from enum import Enum
from typing import Callable, Union

import numpy as np


def sigmoid(z: np.ndarray) -> np.ndarray:
    """The sigmoid function, applied elementwise."""
    return 1.0 / (1.0 + np.exp(-z))


def relu(z: np.ndarray) -> np.ndarray:
    return np.maximum(z, 0.0)


def tanh(z: np.ndarray) -> np.ndarray:
    return np.tanh(z)


def softmax(z: np.ndarray) -> np.ndarray:
    """
    Row-normalizing softmax.

    Every row of the result is a probability distribution summing to 1.
    The row maximum is subtracted first so large activations do not overflow.
    """
    shifted = np.exp(z - np.max(z, axis=1, keepdims=True))
    return shifted / np.sum(shifted, axis=1, keepdims=True)


class Activation(Enum):
    """Named activation; the value is the token used in saved files."""

    SIGMOID = 'sigmoid'
    RELU = 'relu'
    TANH = 'tanH'
    SOFTMAX = 'softmax'

    @property
    def transform(self) -> Callable[[np.ndarray], np.ndarray]:
        return _TRANSFORMS[self]

    def apply(self, z: np.ndarray) -> np.ndarray:
        """
        Apply the transform to a batch matrix.

        Args:
            z: Pre-activation matrix of shape [batch x size]

        Returns:
            A new matrix of the same shape
        """
        return self.transform(z)

    @classmethod
    def from_name(cls, name: str) -> 'Activation':
        """
        Look up an activation by its serialized name.

        Raises:
            ValueError: If the name is not a known activation
        """
        try:
            return cls(name)
        except ValueError:
            known = ', '.join(member.value for member in cls)
            raise ValueError(
                f"Unknown activation '{name}', expected one of: {known}"
            ) from None

    @classmethod
    def coerce(cls, value: Union['Activation', str]) -> 'Activation':
        """Accept either a member or its serialized name."""
        if isinstance(value, cls):
            return value
        return cls.from_name(value)


_TRANSFORMS = {
    Activation.SIGMOID: sigmoid,
    Activation.RELU: relu,
    Activation.TANH: tanh,
    Activation.SOFTMAX: softmax
}
