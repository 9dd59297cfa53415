"""
Tensor serialization utilities for coordinator and peer messages.

Converts between PyTorch tensors and JSON-safe dictionaries so parameters,
deltas and plan arguments can travel over HTTP and WebSocket connections.
"""

import base64
from typing import Optional, Dict, Any, List, Sequence

import numpy as np
import torch


# Mapping between PyTorch dtypes and wire names
DTYPE_TO_WIRE = {
    torch.float32: "float32",
    torch.float64: "float64",
    torch.float16: "float16",
    torch.int8: "int8",
    torch.int32: "int32",
    torch.int64: "int64",
    torch.bool: "bool",
}

WIRE_TO_DTYPE = {v: k for k, v in DTYPE_TO_WIRE.items()}


def serialize_tensor(
    tensor: torch.Tensor,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Convert a PyTorch tensor to a JSON-safe dictionary.

    Args:
        tensor: PyTorch tensor to serialize
        name: Optional identifier for the tensor

    Returns:
        Dictionary with shape, dtype and base64-encoded raw bytes
    """
    if tensor.dtype not in DTYPE_TO_WIRE:
        raise ValueError(f"Unsupported tensor dtype: {tensor.dtype}")

    # Ensure tensor is contiguous for efficient serialization
    tensor_np = tensor.detach().contiguous().cpu().numpy()

    payload = {
        'shape': list(tensor.shape),
        'dtype': DTYPE_TO_WIRE[tensor.dtype],
        'data': base64.b64encode(tensor_np.tobytes()).decode('ascii'),
    }
    if name:
        payload['name'] = name

    return payload


def deserialize_tensor(
    payload: Dict[str, Any], device: Optional[torch.device] = None
) -> torch.Tensor:
    """
    Convert a dictionary produced by serialize_tensor back to a tensor.

    Args:
        payload: Serialized tensor
        device: Target device for the tensor (CPU or CUDA)

    Returns:
        PyTorch tensor reconstructed from the payload
    """
    try:
        dtype = WIRE_TO_DTYPE[payload['dtype']]
    except KeyError:
        raise ValueError(f"Unsupported tensor dtype: {payload.get('dtype')}")

    np_dtype = torch_to_numpy_dtype(dtype)
    tensor_np = np.frombuffer(base64.b64decode(payload['data']), dtype=np_dtype)
    tensor_np = tensor_np.reshape(tuple(payload['shape']))

    # frombuffer creates read-only arrays; copy before handing to torch
    tensor = torch.from_numpy(tensor_np.copy())

    if device:
        tensor = tensor.to(device)

    return tensor


def serialize_tensors(
    tensors: Sequence[torch.Tensor],
    names: Optional[Sequence[str]] = None
) -> List[Dict[str, Any]]:
    """Serialize an ordered list of tensors."""
    if names is None:
        return [serialize_tensor(t) for t in tensors]
    return [serialize_tensor(t, name=n) for t, n in zip(tensors, names)]


def deserialize_tensors(
    payloads: Sequence[Dict[str, Any]],
    device: Optional[torch.device] = None
) -> List[torch.Tensor]:
    """Deserialize an ordered list of tensors."""
    return [deserialize_tensor(p, device=device) for p in payloads]


def torch_to_numpy_dtype(torch_dtype: torch.dtype) -> np.dtype:
    """Convert PyTorch dtype to numpy dtype."""
    mapping = {
        torch.float32: np.float32,
        torch.float64: np.float64,
        torch.float16: np.float16,
        torch.int8: np.int8,
        torch.int32: np.int32,
        torch.int64: np.int64,
        torch.bool: np.bool_,
    }
    return mapping[torch_dtype]
