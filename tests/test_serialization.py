"""
test_serialization.py
~~~~~~~~~~~~~~~~~~~~~

Unit tests for the hexadecimal text format.
"""

import pytest
import io
import os
import sys

import numpy as np

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ffnet.errors import FormatError, InvariantViolation, NetworkIOError
from ffnet.network import create_network
from ffnet.serialization import dump, dumps, load, loads, read_network, save_network


@pytest.fixture
def network():
    """A 3-4-2 network with a sigmoid hidden layer and softmax output."""
    return create_network(3, [4], ['sigmoid'], 2, 'softmax', rng=np.random.default_rng(0))


@pytest.fixture
def tiny_network():
    """2-2 network with hand-picked weights."""
    net = create_network(2, [], [], 2, 'softmax')
    net.connections[0].weights = np.array([[1.5, -0.25], [0.0, 2.0]])
    net.connections[0].bias = np.array([[0.5, -1.0]])
    return net


def assert_same_parameters(a, b):
    """Compare every weight and bias bit for bit."""
    assert a.sizes == b.sizes
    assert a.activations == b.activations
    for con_a, con_b in zip(a.connections, b.connections):
        assert con_a.weights.tobytes() == con_b.weights.tobytes()
        assert con_a.bias.tobytes() == con_b.bias.tobytes()


@pytest.mark.unit
class TestSave:
    """Test the layout of written files."""

    def test_exact_layout(self, tiny_network):
        """Test header, activation, weights then bias, one per line."""
        assert dumps(tiny_network).splitlines() == [
            '2',
            '2',
            '2',
            'softmax',
            (1.5).hex(),
            (-0.25).hex(),
            (0.0).hex(),
            (2.0).hex(),
            (0.5).hex(),
            (-1.0).hex(),
        ]

    def test_line_count(self, network):
        """Test 1 + sizes + activations + weights + biases lines."""
        lines = dumps(network).splitlines()
        assert len(lines) == 1 + 3 + 2 + (3 * 4 + 4 * 2) + (4 + 2)

    @pytest.mark.parametrize("output", ['sigmoid', 'relu', 'tanH', 'softmax'])
    def test_output_activation_always_written(self, output):
        net = create_network(2, [3], ['relu'], 2, output)
        lines = dumps(net).splitlines()
        assert lines[4:6] == ['relu', output]

    def test_hidden_activation_names_written_as_is(self):
        net = create_network(2, [3, 3, 3], ['sigmoid', 'relu', 'tanH'], 2, 'softmax')
        assert dumps(net).splitlines()[6:10] == ['sigmoid', 'relu', 'tanH', 'softmax']

    def test_destroyed_network_rejected(self, network):
        network.destroy()
        with pytest.raises(InvariantViolation):
            dumps(network)


@pytest.mark.unit
class TestRoundTrip:
    """Test that reading a written network restores it exactly."""

    @pytest.mark.parametrize("output", ['softmax', 'sigmoid', 'relu', 'tanH'])
    def test_bit_exact(self, output):
        net = create_network(
            5, [4, 3], ['tanH', 'relu'], 3, output, rng=np.random.default_rng(3)
        )
        assert_same_parameters(net, loads(dumps(net)))

    def test_extreme_values(self, tiny_network):
        """Test subnormals, huge values and negative zero survive."""
        tiny_network.connections[0].weights = np.array([
            [5e-324, 1.7976931348623157e308],
            [-0.0, 0.1]
        ])
        restored = loads(dumps(tiny_network))

        assert_same_parameters(tiny_network, restored)
        assert np.signbit(restored.connections[0].weights[1, 0])

    def test_file_round_trip(self, network, tmp_path):
        path = str(tmp_path / "model.net")
        save_network(network, path)
        assert_same_parameters(network, read_network(path))

    def test_stream_round_trip(self, network):
        buffer = io.StringIO()
        dump(network, buffer)
        buffer.seek(0)
        assert_same_parameters(network, load(buffer))

    def test_restored_network_computes_same_output(self, network):
        inputs = np.random.default_rng(9).standard_normal((4, 3))
        restored = loads(dumps(network))
        assert np.array_equal(network.infer(inputs), restored.infer(inputs))

    def test_reads_c_style_hex(self):
        """Test short '%la' style hex floats are accepted."""
        text = "2\n1\n1\nsigmoid\n0x1.8p+0\n-0x1p-2\n"
        net = loads(text)
        assert net.connections[0].weights[0, 0] == 1.5
        assert net.connections[0].bias[0, 0] == -0.25

    def test_trailing_blank_lines_allowed(self, tiny_network):
        assert_same_parameters(tiny_network, loads(dumps(tiny_network) + "\n\n"))


@pytest.mark.unit
class TestMalformedInput:
    """Test that bad input produces a FormatError with location details."""

    def test_empty_text(self):
        with pytest.raises(FormatError) as exc_info:
            loads("")
        assert exc_info.value.line == 1
        assert exc_info.value.found == '<end of file>'

    def test_non_integer_layer_count(self):
        with pytest.raises(FormatError) as exc_info:
            loads("two\n")
        assert exc_info.value.line == 1
        assert exc_info.value.found == 'two'

    def test_too_few_layers(self):
        with pytest.raises(FormatError) as exc_info:
            loads("1\n3\n")
        assert "at least 2" in exc_info.value.expected

    def test_non_positive_size(self):
        with pytest.raises(FormatError) as exc_info:
            loads("2\n3\n0\nsoftmax\n")
        assert exc_info.value.line == 3

    def test_unknown_activation(self):
        with pytest.raises(FormatError) as exc_info:
            loads("2\n1\n1\nswish\n0x1p+0\n0x1p+0\n")
        assert exc_info.value.line == 4
        assert exc_info.value.found == 'swish'

    def test_legacy_file_without_output_activation(self):
        """Test files that omitted a non-softmax output token are rejected."""
        text = "3\n1\n1\n1\nrelu\n0x1p+0\n0x1p+0\n0x0p+0\n0x0p+0\n"
        with pytest.raises(FormatError) as exc_info:
            loads(text)
        assert exc_info.value.line == 6
        assert "output activation" in exc_info.value.expected

    def test_truncated_values(self, tiny_network):
        """Test a file cut short reports how many values were expected."""
        lines = dumps(tiny_network).splitlines()
        with pytest.raises(FormatError) as exc_info:
            loads("\n".join(lines[:-2]) + "\n")
        assert "6 weight and bias values" in exc_info.value.expected
        assert "4 remaining" in exc_info.value.found

    def test_bad_value_token(self, tiny_network):
        lines = dumps(tiny_network).splitlines()
        lines[5] = "not-a-number"
        with pytest.raises(FormatError) as exc_info:
            loads("\n".join(lines))
        assert exc_info.value.line == 6
        assert exc_info.value.found == "not-a-number"
        assert "weight" in exc_info.value.expected

    def test_decimal_value_rejected(self, tiny_network):
        """Test decimal text is not misread as hexadecimal digits."""
        lines = dumps(tiny_network).splitlines()
        lines[4] = "1.5"
        with pytest.raises(FormatError) as exc_info:
            loads("\n".join(lines))
        assert exc_info.value.line == 5

    def test_out_of_range_value_rejected(self):
        """Test a hex exponent beyond the double range is a format error."""
        with pytest.raises(FormatError) as exc_info:
            loads("2\n1\n1\nsigmoid\n0x1p+99999\n0x0p+0\n")
        assert exc_info.value.line == 5
        assert exc_info.value.found == '0x1p+99999'

    @pytest.mark.parametrize("token", ["+3", "1_000", "٣", " -2"])
    def test_non_plain_integer_rejected(self, token):
        """Test counts and sizes must be plain ASCII digits."""
        with pytest.raises(FormatError) as exc_info:
            loads(f"2\n{token}\n1\nsigmoid\n")
        assert exc_info.value.line == 2

    def test_trailing_garbage(self, tiny_network):
        with pytest.raises(FormatError) as exc_info:
            loads(dumps(tiny_network) + "extra\n")
        assert exc_info.value.found == 'extra'

    def test_huge_sizes_fail_before_allocation(self):
        with pytest.raises(FormatError):
            loads("2\n100000\n100000\nsoftmax\n0x1p+0\n")

    def test_path_in_message(self, tmp_path):
        path = tmp_path / "broken.net"
        path.write_text("2\n2\n")
        with pytest.raises(FormatError) as exc_info:
            read_network(str(path))
        assert exc_info.value.path == str(path)
        assert str(path) in str(exc_info.value)

    def test_format_error_is_value_error(self):
        with pytest.raises(ValueError):
            loads("x")


@pytest.mark.unit
class TestFileErrors:
    """Test I/O failures surface as NetworkIOError."""

    def test_missing_file(self, tmp_path):
        path = str(tmp_path / "missing.net")
        with pytest.raises(NetworkIOError) as exc_info:
            read_network(path)
        assert exc_info.value.path == path

    def test_unwritable_path(self, network, tmp_path):
        path = str(tmp_path / "no_such_dir" / "model.net")
        with pytest.raises(NetworkIOError):
            save_network(network, path)

    def test_non_ascii_file_is_format_error(self, tiny_network, tmp_path):
        """Test undecodable bytes are reported as malformed content, not I/O."""
        path = tmp_path / "latin1.net"
        raw = dumps(tiny_network).encode('ascii').replace(b'softmax', b'softm\xe4x', 1)
        path.write_bytes(raw)
        with pytest.raises(FormatError) as exc_info:
            read_network(str(path))
        assert exc_info.value.line == 4
        assert exc_info.value.path == str(path)
        assert '\\xe4' in exc_info.value.found

    def test_io_error_is_os_error(self, tmp_path):
        with pytest.raises(OSError):
            read_network(str(tmp_path / "missing.net"))
