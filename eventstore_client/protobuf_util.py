"""Protocol Buffer framing for event store messages.

Frames are carried as a ``google.protobuf.Struct`` holding the same envelope the
JSON codec produces, serialized as binary WebSocket messages.

Architectural Boundary: This is transport code.
- NO operation semantics
- Pure message serialization/deserialization
"""

from __future__ import annotations

from typing import Any

from google.protobuf import json_format, struct_pb2
from google.protobuf.message import DecodeError

from .protocol import Frame, build_envelope, parse_envelope


def dict_to_struct(data: dict[str, Any]) -> struct_pb2.Struct:
    """Convert Python dict to protobuf Struct.

    Args:
        data: Python dictionary

    Returns:
        Protobuf Struct
    """
    struct = struct_pb2.Struct()
    struct.update(data)
    return struct


def struct_to_dict(struct: struct_pb2.Struct) -> dict[str, Any]:
    """Convert protobuf Struct to a plain Python dict (nested values included)."""
    return json_format.MessageToDict(struct)


def serialize_frame(frame: Frame) -> bytes:
    """Serialize a frame to binary."""
    return dict_to_struct(build_envelope(frame)).SerializeToString()


def deserialize_frame(data: bytes) -> Frame:
    """Deserialize binary data into a frame.

    Raises:
        ValueError: If data is not a valid envelope
    """
    struct = struct_pb2.Struct()
    try:
        struct.ParseFromString(data)
    except DecodeError as err:
        raise ValueError("Invalid protobuf frame") from err

    envelope = struct_to_dict(struct)
    # Struct stores every number as a double
    if isinstance(envelope.get("v"), float):
        envelope["v"] = int(envelope["v"])
    return parse_envelope(envelope)


class ProtobufFrameCodec:
    """Encode frames as binary protobuf messages."""

    def encode(self, frame: Frame) -> bytes:
        return serialize_frame(frame)

    def decode(self, data: str | bytes) -> Frame:
        if isinstance(data, str):
            raise ValueError("Protobuf frames must be binary")
        return deserialize_frame(data)
