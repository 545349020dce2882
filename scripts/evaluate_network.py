#!/usr/bin/env python3
"""
Evaluate a saved network on a labelled dataset.

Loads a network file in the hexadecimal text format and an NPZ dataset,
then reports cross-entropy loss and accuracy.

Usage:
    python scripts/evaluate_network.py model.net data.npz [--regularization 0.01]

The NPZ file must contain:
    inputs : array [examples x features]
    labels : one-hot array [examples x classes]
"""

import os
import sys
import argparse
from typing import Tuple

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ffnet.errors import FormatError, InvariantViolation, NetworkIOError
from ffnet.network import Network, cross_entropy_loss
from ffnet.serialization import read_network


def load_dataset(filepath: str) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load inputs and one-hot labels from an NPZ file.

    Parameters:
    -----------
    filepath : str
        Path to the .npz file

    Returns:
    --------
    tuple
        (inputs, labels) as 2-D float arrays
    """
    print(f"📂 Loading dataset from: {filepath}")

    with np.load(filepath) as data:
        if 'inputs' not in data or 'labels' not in data:
            raise KeyError("NPZ file must contain 'inputs' and 'labels' arrays")
        inputs = np.asarray(data['inputs'], dtype=np.float64)
        labels = np.asarray(data['labels'], dtype=np.float64)

    print(f"✅ Loaded {inputs.shape[0]} examples with {inputs.shape[1]} features")
    return inputs, labels


def evaluate(net: Network, inputs: np.ndarray, labels: np.ndarray,
             regularization: float) -> Tuple[float, float]:
    """
    Compute loss and accuracy of a network on a dataset.

    Parameters:
    -----------
    net : Network
        Network to evaluate
    inputs, labels : np.ndarray
        Dataset rows and their one-hot labels
    regularization : float
        L2 penalty strength added to the loss

    Returns:
    --------
    tuple
        (loss, accuracy)
    """
    print(f"\n🔍 Evaluating network with sizes {net.sizes}...")
    prediction = net.infer(inputs)
    loss = cross_entropy_loss(prediction, labels, regularization, network=net)
    accuracy = net.accuracy(inputs, labels)
    return loss, accuracy


def main():
    """Main evaluation function."""
    parser = argparse.ArgumentParser(description="Evaluate a saved network")
    parser.add_argument('network', help="network file in hex text format")
    parser.add_argument('dataset', help=".npz file with 'inputs' and 'labels'")
    parser.add_argument('--regularization', type=float, default=0.0,
                        help="L2 regularization strength for the loss")
    args = parser.parse_args()

    print("=" * 60)
    print("Network Evaluation")
    print("=" * 60)

    try:
        net = read_network(args.network)
        inputs, labels = load_dataset(args.dataset)
        loss, accuracy = evaluate(net, inputs, labels, args.regularization)

    except (NetworkIOError, FormatError) as e:
        print(f"\n❌ Cannot read network: {e}")
        sys.exit(1)
    except (OSError, KeyError, InvariantViolation) as e:
        print(f"\n❌ Dataset does not fit the network: {e}")
        sys.exit(1)

    print("\n" + "=" * 60)
    print(f"Loss:     {loss:.6f}")
    print(f"Accuracy: {accuracy:.2%} ({int(round(accuracy * len(inputs)))}/{len(inputs)})")
    print("=" * 60)


if __name__ == '__main__':
    main()
