"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server for feedforward network inference.

This module provides endpoints for:
- Creating and managing networks
- Running forward passes, predictions, loss and accuracy on JSON batches
- Importing and exporting networks in the hexadecimal text format
- Persisting networks to/from SQLite database
- Rendering weight heatmaps

The server uses:
- Flask for REST API endpoints
- Flask-CORS for cross-origin access
- Matplotlib (Agg backend) for weight images
- SQLite for network persistence
"""

import os
import sys
import uuid
import base64
import logging
import threading
from io import BytesIO
from typing import Dict, Any, Optional

import numpy as np
from flask import Flask, Response, request, jsonify
from flask_cors import CORS

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Local imports
from ffnet import model_persistence
from ffnet.errors import FormatError, InvariantViolation
from ffnet.network import (
    Network,
    create_network,
    cross_entropy_loss,
    forward_pass,
    predict
)
from ffnet.serialization import dumps, loads

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: quiet the request log but keep our logs at INFO
    - In development: show everything at LOG_LEVEL
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('ffnet').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

# Where the SQLite model store lives
MODEL_DIR = os.getenv('MODEL_DIR', model_persistence.DEFAULT_MODEL_DIR)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}
_networks_lock = threading.Lock()


def reload_saved_networks() -> None:
    """
    Load every network in the model store into memory.

    Called at startup so networks saved before a restart are served again.
    """
    saved_networks = model_persistence.list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = model_persistence.load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        with _networks_lock:
            active_networks[network_id] = {
                'network': net,
                'accuracy': net_info['accuracy'],
                'persisted': True
            }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def describe(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    """JSON description of an in-memory network."""
    net: Network = info['network']
    return {
        'network_id': network_id,
        'architecture': model_persistence.describe_architecture(net),
        'accuracy': info['accuracy'],
        'status': 'in_memory'
    }


def get_active(network_id: str) -> Optional[Dict[str, Any]]:
    with _networks_lock:
        return active_networks.get(network_id)


def register(net: Network, accuracy: Optional[float] = None) -> str:
    network_id = str(uuid.uuid4())
    with _networks_lock:
        active_networks[network_id] = {
            'network': net,
            'accuracy': accuracy,
            'persisted': False
        }
    return network_id


def is_json_int(value: Any) -> bool:
    # JSON true/false arrive as bool, which subclasses int
    return isinstance(value, int) and not isinstance(value, bool)


def is_json_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def matrix_from_json(data: Dict[str, Any], key: str) -> np.ndarray:
    """
    Read a 2-D float matrix from a request body.

    Raises:
        InvariantViolation: If the value is missing or not a 2-D array
    """
    if key not in data:
        raise InvariantViolation(f"Missing '{key}' in request body")
    try:
        matrix = np.asarray(data[key], dtype=np.float64)
    except (TypeError, ValueError):
        raise InvariantViolation(f"'{key}' must be a numeric matrix") from None
    if matrix.ndim != 2:
        raise InvariantViolation(
            f"'{key}' must be a list of rows, got {matrix.ndim} dimension(s)"
        )
    return matrix


def create_weights_image(net: Network) -> str:
    """
    Create a base64-encoded PNG with one heatmap per connection.

    Args:
        net: Network whose weights are drawn

    Returns:
        Base64-encoded PNG image string
    """
    num = net.num_connections
    fig, axes = plt.subplots(1, num, figsize=(3 * num, 3), squeeze=False)
    for ax, con in zip(axes[0], net.connections):
        image = ax.imshow(con.weights, cmap='coolwarm', aspect='auto')
        ax.set_title(f"{con.from_layer.size} -> {con.to_layer.size}")
        ax.set_xlabel('to')
        ax.set_ylabel('from')
        fig.colorbar(image, ax=ax)

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close(fig)

    return img_base64


@app.errorhandler(InvariantViolation)
def handle_invariant_violation(e: InvariantViolation):
    logger.warning(f"Rejected request: {e}")
    return jsonify({'error': str(e)}), 400


@app.errorhandler(FormatError)
def handle_format_error(e: FormatError):
    logger.warning(f"Rejected network text: {e}")
    return jsonify({'error': str(e), 'details': e.to_dict()}), 400


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and the number of networks in memory."""
    with _networks_lock:
        count = len(active_networks)
    return jsonify({
        'status': 'online',
        'active_networks': count
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network_endpoint():
    """
    Create a new network with random weights.

    Request body (all optional):
        {
            'num_features': 784,
            'hidden_sizes': [30],
            'hidden_activations': ['sigmoid'],
            'num_classes': 10,
            'output_activation': 'softmax',
            'seed': 42
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    num_features = data.get('num_features', 784)
    hidden_sizes = data.get('hidden_sizes', [30])
    hidden_activations = data.get('hidden_activations', ['sigmoid'] * len(hidden_sizes))
    num_classes = data.get('num_classes', 10)
    output_activation = data.get('output_activation', 'softmax')
    seed = data.get('seed')

    for name, value in (('num_features', num_features), ('num_classes', num_classes)):
        if not is_json_int(value) or value < 1:
            return jsonify({'error': f'{name} must be a positive integer'}), 400
    if not isinstance(hidden_sizes, list) or not all(
        is_json_int(size) and size > 0 for size in hidden_sizes
    ):
        return jsonify({'error': 'hidden_sizes must be a list of positive integers'}), 400
    if not isinstance(hidden_activations, list):
        return jsonify({'error': 'hidden_activations must be a list'}), 400
    if seed is not None and not is_json_int(seed):
        return jsonify({'error': 'seed must be an integer'}), 400

    rng = np.random.default_rng(seed) if seed is not None else None
    net = create_network(
        num_features,
        hidden_sizes,
        hidden_activations,
        num_classes,
        output_activation,
        rng=rng
    )
    network_id = register(net)

    logger.info(f"Created network {network_id} with sizes {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': model_persistence.describe_architecture(net),
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    with _networks_lock:
        in_memory = [describe(nid, info) for nid, info in active_networks.items()]

    in_memory_ids = {net['network_id'] for net in in_memory}
    saved_only = []
    for net in model_persistence.list_saved_networks(MODEL_DIR):
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    """Describe one in-memory network."""
    info = get_active(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404
    return jsonify(describe(network_id, info)), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    with _networks_lock:
        info = active_networks.pop(network_id, None)
    deleted_from_memory = info is not None
    if info is not None:
        info['network'].destroy()

    deleted_from_disk = model_persistence.delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    with _networks_lock:
        removed = dict(active_networks)
        active_networks.clear()
    for info in removed.values():
        info['network'].destroy()

    saved_ids = [net['network_id'] for net in model_persistence.list_saved_networks(MODEL_DIR)]
    deleted_from_disk_count = sum(
        1 for network_id in saved_ids
        if model_persistence.delete_network(network_id, MODEL_DIR)
    )
    total = len(set(removed) | set(saved_ids))

    logger.info(
        f"Deleted all networks: {total} total, "
        f"{len(removed)} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': total,
        'deleted_from_memory': len(removed),
        'deleted_from_disk': deleted_from_disk_count,
        'message': f'Successfully deleted {total} network(s)'
    }), 200


@app.route('/api/networks/<network_id>/forward', methods=['POST'])
def forward_endpoint(network_id: str):
    """
    Run a batch through the network.

    Request body:
        {'inputs': [[...], ...]}  # one row per example

    Returns:
        JSON with the output layer's activations and predicted classes
    """
    info = get_active(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    inputs = matrix_from_json(request.get_json(silent=True) or {}, 'inputs')
    net: Network = info['network']

    with net.lock:
        forward_pass(net, inputs)
        outputs = net.output.tolist()
        predictions = predict(net)

    return jsonify({
        'network_id': network_id,
        'outputs': outputs,
        'predictions': predictions
    }), 200


@app.route('/api/networks/<network_id>/loss', methods=['POST'])
def loss_endpoint(network_id: str):
    """
    Cross-entropy loss of the network on a labelled batch.

    Request body:
        {'inputs': [[...]], 'labels': [[...]], 'regularization_strength': 0.0}
    """
    info = get_active(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    inputs = matrix_from_json(data, 'inputs')
    labels = matrix_from_json(data, 'labels')
    strength = data.get('regularization_strength', 0.0)
    if not is_json_number(strength) or strength < 0:
        return jsonify({'error': 'regularization_strength must be a non-negative number'}), 400

    net: Network = info['network']
    prediction = net.infer(inputs)
    loss = cross_entropy_loss(
        prediction,
        labels,
        strength,
        network=net if strength else None
    )

    return jsonify({
        'network_id': network_id,
        'loss': loss,
        'regularization_strength': strength
    }), 200


@app.route('/api/networks/<network_id>/accuracy', methods=['POST'])
def accuracy_endpoint(network_id: str):
    """
    Accuracy of the network on a one-hot labelled batch.

    The result is recorded with the network and, if it has been saved,
    in the model store.
    """
    info = get_active(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    inputs = matrix_from_json(data, 'inputs')
    labels = matrix_from_json(data, 'labels')

    net: Network = info['network']
    accuracy = net.accuracy(inputs, labels)
    info['accuracy'] = accuracy

    if info['persisted']:
        model_persistence.save_network(net, network_id, MODEL_DIR, accuracy=accuracy)

    logger.info(f"Network {network_id} accuracy: {accuracy:.2%} on {len(inputs)} example(s)")

    return jsonify({
        'network_id': network_id,
        'accuracy': accuracy,
        'examples': len(inputs)
    }), 200


@app.route('/api/networks/<network_id>/save', methods=['POST'])
def save_network_endpoint(network_id: str):
    """Persist an in-memory network to the model store."""
    info = get_active(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    if not model_persistence.save_network(
        info['network'], network_id, MODEL_DIR, accuracy=info['accuracy']
    ):
        return jsonify({'error': 'Failed to save network'}), 500
    info['persisted'] = True

    return jsonify({'network_id': network_id, 'status': 'saved'}), 200


@app.route('/api/networks/<network_id>/export', methods=['GET'])
def export_network(network_id: str):
    """Download the network in the hexadecimal text format."""
    info = get_active(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    return Response(
        dumps(info['network']),
        mimetype='text/plain',
        headers={'Content-Disposition': f'attachment; filename={network_id}.net'}
    )


@app.route('/api/networks/import', methods=['POST'])
def import_network():
    """
    Load a network from text in the hexadecimal format.

    The request body is the file contents. Malformed text is answered with
    400 and the line, expected token and found token.
    """
    text = request.get_data(as_text=True)
    net = loads(text, path='<upload>')
    network_id = register(net)

    logger.info(f"Imported network {network_id} with sizes {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': model_persistence.describe_architecture(net),
        'status': 'imported'
    }), 201


@app.route('/api/networks/<network_id>/weights_image', methods=['GET'])
def weights_image(network_id: str):
    """Return a base64 PNG heatmap of every connection's weights."""
    info = get_active(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404

    return jsonify({
        'network_id': network_id,
        'image_data': create_weights_image(info['network'])
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Delete stored networks older than the given number of days.

    Request body (optional):
        {'days': 2}  # defaults to 2

    Returns:
        JSON with deleted_count, days, and message
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', 2)

    if not is_json_number(days) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = model_persistence.delete_old_networks(days=days, model_dir=MODEL_DIR)
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    # Drop in-memory copies of networks that no longer exist on disk
    saved_ids = {net['network_id'] for net in model_persistence.list_saved_networks(MODEL_DIR)}
    with _networks_lock:
        stale = [
            nid for nid in active_networks
            if active_networks[nid]['persisted'] and nid not in saved_ids
        ]
        for nid in stale:
            del active_networks[nid]

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    reload_saved_networks()

    port = int(os.environ.get('PORT', 8000))
    is_production = os.getenv('FLASK_ENV') == 'production'
    logger.info(f"Starting server at http://localhost:{port}/")

    try:
        app.run(host='0.0.0.0', port=port, debug=not is_production, use_reloader=False)
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
