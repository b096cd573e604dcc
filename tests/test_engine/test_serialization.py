"""Tests for transcript load/save and atomic writes."""

from __future__ import annotations

import json

import pytest

from agentrun.engine.serialization import (
    build_messages_wrapper,
    dump_messages,
    load_messages,
    parse_messages,
    save_messages,
    write_atomic,
)
from agentrun.exceptions import InvalidRoleError, SequenceError, TranscriptError
from agentrun.protocols import Message, ToolCall


def _transcript() -> list[Message]:
    return [
        Message(role="system", content="sys"),
        Message(role="user", content="hi"),
        Message(
            role="assistant",
            tool_calls=(ToolCall(id="c1", name="echo", arguments='{"text":"hi"}'),),
        ),
        Message(role="tool", content='{"text":"hi"}', name="echo", tool_call_id="c1"),
        Message(role="assistant", content="done", channel="final"),
    ]


class TestWriteAtomic:
    def test_creates_parents(self, tmp_path) -> None:
        target = tmp_path / "a" / "b" / "out.json"
        write_atomic(target, b"data")
        assert target.read_bytes() == b"data"

    def test_no_temp_files_left(self, tmp_path) -> None:
        write_atomic(tmp_path / "out.json", b"1")
        write_atomic(tmp_path / "out.json", b"2")
        assert [p.name for p in tmp_path.iterdir()] == ["out.json"]
        assert (tmp_path / "out.json").read_bytes() == b"2"


class TestParseMessages:
    def test_bare_array(self) -> None:
        out = parse_messages('[{"role": "user", "content": "hi"}]')
        assert out == [Message(role="user", content="hi")]

    def test_wrapper_object(self) -> None:
        out = parse_messages('{"messages": [{"role": "user", "content": "hi"}], "prestage": {}}')
        assert out == [Message(role="user", content="hi")]

    def test_null_content(self) -> None:
        out = parse_messages('[{"role": "assistant", "content": null}]')
        assert out[0].content == ""

    @pytest.mark.parametrize("text", ["not json", '{"messages": 3}', "[1, 2]", '"x"'])
    def test_malformed(self, text: str) -> None:
        with pytest.raises(TranscriptError, match="parse messages JSON"):
            parse_messages(text)


class TestSaveAndLoad:
    def test_round_trip_preserves_tool_calls(self, tmp_path) -> None:
        path = tmp_path / "t.json"
        save_messages(path, _transcript(), {"enabled": True})
        loaded = load_messages(path)
        assert loaded == _transcript()
        data = json.loads(path.read_text())
        assert data["prestage"] == {"enabled": True}
        assert data["messages"][2]["tool_calls"][0]["function"]["name"] == "echo"

    def test_wrapper_without_metadata(self) -> None:
        assert build_messages_wrapper([Message(role="user", content="x")]) == {
            "messages": [{"role": "user", "content": "x"}]
        }

    def test_dump_is_indented(self) -> None:
        assert "\n  " in dump_messages([Message(role="user", content="x")])

    def test_load_rejects_invalid_role(self, tmp_path) -> None:
        path = tmp_path / "t.json"
        path.write_text('[{"role": "robot", "content": "x"}]')
        with pytest.raises(InvalidRoleError):
            load_messages(path)

    def test_load_rejects_broken_sequence(self, tmp_path) -> None:
        path = tmp_path / "t.json"
        path.write_text('[{"role": "tool", "content": "{}", "tool_call_id": "x"}]')
        with pytest.raises(SequenceError):
            load_messages(path)

    def test_load_normalizes_roles(self, tmp_path) -> None:
        path = tmp_path / "t.json"
        path.write_text('[{"role": " USER ", "content": "x"}]')
        assert load_messages(path)[0].role == "user"
