"""Shared test fixtures for agentrun.

Provides a recording fake ChatClient, response builders, and a config
factory rooted at a temporary working directory.
"""

from __future__ import annotations

import copy
import json

import pytest

from agentrun.models.config import AgentConfig, PrepConfig


# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------

def tool_call_dict(call_id: str, name: str, arguments: str | dict = "") -> dict:
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


def chat_response(
    content: str = "",
    *,
    channel: str | None = None,
    tool_calls: list[dict] | None = None,
    finish_reason: str = "stop",
) -> dict:
    """Build an OpenAI chat completion response dict."""
    message: dict = {"role": "assistant", "content": content}
    if channel is not None:
        message["channel"] = channel
    if tool_calls:
        message["tool_calls"] = tool_calls
        if finish_reason == "stop":
            finish_reason = "tool_calls"
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


class FakeChatClient:
    """Scripted ChatClient that records every payload it receives.

    ``responses`` feed ``chat()``; ``stream_responses`` feed
    ``stream_chat()`` as ``(deltas, response)`` pairs where ``deltas`` is a
    list of ``(channel, text)``. Exceptions in either script are raised.
    """

    def __init__(self, responses=(), stream_responses=()) -> None:
        self.responses = list(responses)
        self.stream_responses = list(stream_responses)
        self.requests: list[dict] = []
        self.stream_requests: list[dict] = []
        self.closed = False

    def chat(self, payload: dict) -> dict:
        self.requests.append(copy.deepcopy(payload))
        if not self.responses:
            raise AssertionError("unexpected chat() call")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def stream_chat(self, payload: dict, on_delta) -> dict:
        self.stream_requests.append(copy.deepcopy(payload))
        item = self.stream_responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        deltas, response = item
        for channel, text in deltas:
            on_delta(channel, text)
        return response

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def work_dir(tmp_path):
    """Empty working directory for caches and sandboxed tools."""
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def make_config(work_dir):
    """Factory for AgentConfig rooted at ``work_dir`` with the pre-stage off."""

    def _make(prep: PrepConfig | None = None, **kwargs) -> AgentConfig:
        kwargs.setdefault("base_url", "http://test-api/v1")
        kwargs.setdefault("work_dir", str(work_dir))
        return AgentConfig(prep=prep or PrepConfig(enabled=False), **kwargs)

    return _make
