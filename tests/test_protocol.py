"""Tests for frame envelopes and codecs."""

from __future__ import annotations

import json

import pytest

from eventstore_client import JsonFrameCodec, ProtobufFrameCodec, UserCredentials
from eventstore_client.protobuf_util import dict_to_struct, struct_to_dict
from eventstore_client.protocol import (
    FAILURE_KINDS,
    PROTOCOL_VERSION,
    PUSH_KINDS,
    Frame,
    FrameKind,
    build_envelope,
    new_correlation_id,
    parse_envelope,
)


class TestEnvelope:
    """Tests for build_envelope/parse_envelope."""

    def test_build_envelope_without_credentials(self):
        frame = Frame(FrameKind.PROJECTION_COMMAND, "abc", {"command": "list"})

        assert build_envelope(frame) == {
            "v": PROTOCOL_VERSION,
            "kind": "projection_command",
            "correlation_id": "abc",
            "body": {"command": "list"},
        }

    def test_build_envelope_with_credentials(self):
        frame = Frame(
            FrameKind.AUTHENTICATE, "abc", credentials=UserCredentials("admin", "changeit")
        )

        assert build_envelope(frame)["auth"] == {"login": "admin", "password": "changeit"}

    def test_frame_repr_hides_credentials(self):
        frame = Frame(
            FrameKind.AUTHENTICATE, "abc", credentials=UserCredentials("admin", "changeit")
        )

        assert "changeit" not in repr(frame)

    def test_parse_envelope(self):
        frame = parse_envelope(
            {
                "v": 1,
                "kind": "subscription_dropped",
                "correlation_id": "abc",
                "body": {"reason": "NotFound"},
                "extra": "ignored",
            }
        )

        assert frame.kind is FrameKind.SUBSCRIPTION_DROPPED
        assert frame.correlation_id == "abc"
        assert frame.body == {"reason": "NotFound"}
        assert frame.credentials is None

    def test_parse_envelope_defaults_body(self):
        frame = parse_envelope({"kind": "heartbeat_request", "correlation_id": "abc"})

        assert frame.body == {}

    @pytest.mark.parametrize(
        ("envelope", "message"),
        [
            ({"correlation_id": "abc"}, "kind is required"),
            ({"kind": "nope", "correlation_id": "abc"}, "Unknown frame kind"),
            ({"kind": "heartbeat_request"}, "correlation_id"),
            ({"kind": "heartbeat_request", "correlation_id": ""}, "correlation_id"),
            (
                {"kind": "heartbeat_request", "correlation_id": "abc", "body": [1]},
                "body must be an object",
            ),
        ],
    )
    def test_parse_envelope_rejects_invalid(self, envelope, message):
        with pytest.raises(ValueError, match=message):
            parse_envelope(envelope)

    def test_correlation_ids_are_unique(self):
        ids = {new_correlation_id() for _ in range(100)}

        assert len(ids) == 100

    def test_kind_groups(self):
        assert FrameKind.STREAM_EVENT_APPEARED in PUSH_KINDS
        assert FrameKind.NOT_HANDLED in FAILURE_KINDS
        assert FrameKind.SUBSCRIPTION_DROPPED not in FAILURE_KINDS


class TestJsonFrameCodec:
    """Tests for the JSON text codec."""

    def test_encode_is_text(self):
        data = JsonFrameCodec().encode(Frame(FrameKind.HEARTBEAT_REQUEST, "abc"))

        assert isinstance(data, str)
        assert json.loads(data)["kind"] == "heartbeat_request"

    def test_decode(self):
        codec = JsonFrameCodec()
        frame = Frame(
            FrameKind.PROJECTION_COMMAND,
            "abc",
            {"command": "create", "query": "fromAll()"},
            UserCredentials("admin", "changeit"),
        )

        assert codec.decode(codec.encode(frame)) == frame

    def test_decode_rejects_non_object(self):
        with pytest.raises(ValueError, match="JSON object"):
            JsonFrameCodec().decode("[1, 2]")

    def test_decode_rejects_invalid_json(self):
        with pytest.raises(ValueError):
            JsonFrameCodec().decode("not json {")


class TestProtobufFrameCodec:
    """Tests for the protobuf binary codec."""

    def test_dict_struct_conversion(self):
        data = {"name": "totals", "nested": {"flag": True}, "items": ["a", "b"]}

        assert struct_to_dict(dict_to_struct(data)) == data

    def test_encode_is_binary(self):
        data = ProtobufFrameCodec().encode(Frame(FrameKind.HEARTBEAT_REQUEST, "abc"))

        assert isinstance(data, bytes)

    def test_decode(self):
        codec = ProtobufFrameCodec()
        frame = Frame(
            FrameKind.SUBSCRIBE_TO_STREAM,
            "abc",
            {"event_stream_id": "orders", "resolve_link_tos": True},
            UserCredentials("admin", "changeit"),
        )

        decoded = codec.decode(codec.encode(frame))

        assert decoded == frame

    def test_numbers_become_floats(self):
        codec = ProtobufFrameCodec()
        frame = Frame(FrameKind.CONNECT_TO_PERSISTENT_SUBSCRIPTION, "abc", {"count": 5})

        decoded = codec.decode(codec.encode(frame))

        assert decoded.body["count"] == 5.0

    def test_decode_rejects_text(self):
        with pytest.raises(ValueError, match="binary"):
            ProtobufFrameCodec().decode('{"kind": "heartbeat_request"}')

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            ProtobufFrameCodec().decode(b"\xff\xff\xff")
