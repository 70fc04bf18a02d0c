"""Tests for Frame → Message parsing.

Validates:
- JSON frames decode to kind="json"
- Malformed frames degrade to kind="raw" with a parse_error, never raise
- event/id pass through unchanged
"""

import dataclasses
import logging
import os
import sys

import pytest

# Ensure streaming/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sse_decoder import Frame
from sse_message import JSON, RAW, Message, MessageParser


class TestJsonFrames:
    def test_object_payload(self):
        message = MessageParser().parse(Frame(data='{"type":"delta","text":"hi"}'))
        assert message.kind == JSON
        assert message.is_json
        assert message.value == {"type": "delta", "text": "hi"}
        assert message.parse_error is None

    def test_scalar_payload(self):
        message = MessageParser().parse(Frame(data="42"))
        assert message.value == 42
        assert message.payload == 42

    def test_multi_line_data_is_one_document(self):
        message = MessageParser().parse(Frame(data='{\n"a": [1,\n2]}'))
        assert message.value == {"a": [1, 2]}

    def test_event_and_id_pass_through(self):
        message = MessageParser().parse(Frame(event="done", id="9", data="{}"))
        assert message.event == "done"
        assert message.id == "9"


class TestMalformedFrames:
    def test_invalid_json_yields_raw(self):
        parser = MessageParser()
        message = parser.parse(Frame(event="delta", id="3", data="not json"))
        assert message.kind == RAW
        assert not message.is_json
        assert message.text == "not json"
        assert message.payload == "not json"
        assert message.parse_error
        assert message.event == "delta"
        assert message.id == "3"
        assert parser.parse_failures == 1

    def test_done_marker_is_raw(self):
        message = MessageParser().parse(Frame(data="[DONE]"))
        assert message.kind == RAW
        assert message.text == "[DONE]"

    def test_empty_data_is_raw(self):
        message = MessageParser().parse(Frame(event="ping"))
        assert message.kind == RAW
        assert message.text == ""

    def test_failure_logged_as_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="agentj_stream.message"):
            MessageParser().parse(Frame(data="{broken"))
        assert "Malformed SSE frame" in caplog.text

    def test_following_frame_still_parses(self):
        parser = MessageParser()
        parser.parse(Frame(data="{broken"))
        message = parser.parse(Frame(data='{"ok":true}'))
        assert message.value == {"ok": True}
        assert parser.parse_failures == 1

    def test_deeply_nested_data_yields_raw(self):
        parser = MessageParser()
        message = parser.parse(Frame(data="[" * 100000))
        assert message.kind == RAW
        assert message.parse_error
        assert len(message.text) == 100000
        assert parser.parse(Frame(data='{"x":2}')).value == {"x": 2}
        assert parser.parse_failures == 1


def test_message_is_immutable():
    message = Message(kind=JSON, value={"a": 1})
    with pytest.raises(dataclasses.FrozenInstanceError):
        message.kind = RAW
