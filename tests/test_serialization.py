"""
Tests for tensor serialization.
"""

import base64

import pytest
import torch

from communication.serialization import (
    serialize_tensor,
    deserialize_tensor,
    serialize_tensors,
    deserialize_tensors,
)


class TestSerialization:
    """Test the JSON tensor format."""

    def test_payload_fields(self):
        payload = serialize_tensor(torch.arange(6, dtype=torch.float32).reshape(2, 3), name="w")

        assert payload['shape'] == [2, 3]
        assert payload['dtype'] == "float32"
        assert payload['name'] == "w"
        assert len(base64.b64decode(payload['data'])) == 6 * 4

    def test_restores_values_and_dtype(self):
        tensor = torch.tensor([[1, -2], [3, 4]], dtype=torch.int64)

        restored = deserialize_tensor(serialize_tensor(tensor))

        assert restored.dtype == torch.int64
        assert torch.equal(restored, tensor)

    def test_restored_tensor_is_writable(self):
        restored = deserialize_tensor(serialize_tensor(torch.zeros(2)))
        restored += 1

        assert torch.equal(restored, torch.ones(2))

    def test_non_contiguous_input(self):
        tensor = torch.arange(6, dtype=torch.float32).reshape(2, 3).t()

        assert torch.equal(deserialize_tensor(serialize_tensor(tensor)), tensor)

    def test_scalar(self):
        payload = serialize_tensor(torch.tensor(0.5))

        assert payload['shape'] == []
        assert deserialize_tensor(payload).item() == 0.5

    def test_unsupported_dtype(self):
        with pytest.raises(ValueError):
            serialize_tensor(torch.zeros(2, dtype=torch.complex64))

        with pytest.raises(ValueError):
            deserialize_tensor({'shape': [1], 'dtype': 'bfloat7', 'data': ''})

    def test_lists_keep_order(self):
        tensors = [torch.zeros(1), torch.ones(2)]
        payloads = serialize_tensors(tensors, names=["a", "b"])

        assert [p['name'] for p in payloads] == ["a", "b"]
        assert [t.shape[0] for t in deserialize_tensors(payloads)] == [1, 2]
