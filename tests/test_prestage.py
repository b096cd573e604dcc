"""Tests for the pre-stage: payload parsing and merging, the cache, and PrestageEngine."""

from __future__ import annotations

import io
import json
import os
import time

import pytest

from agentrun.llm.errors import LLMResponseError
from agentrun.models.config import PrepConfig
from agentrun.prestage import (
    PrepCache,
    PrestageEngine,
    cache_key,
    merge_prestage_payload,
    parse_prestage_payload,
    ttl_from_env,
)
from agentrun.prestage.payload import PrestagePayload, ToolConfig
from agentrun.protocols import Message, ToolCall

from tests.conftest import FakeChatClient, chat_response, tool_call_dict


# ===========================================================================
# Payload parsing
# ===========================================================================

class TestParsePayload:
    def test_empty_text(self) -> None:
        assert parse_prestage_payload("  ").is_empty

    def test_single_object(self) -> None:
        payload = parse_prestage_payload('{"system": "  be brief  "}')
        assert payload.system == "be brief"

    def test_all_variants(self) -> None:
        text = json.dumps([
            {"role": "System", "content": "sys one"},
            {"developer": "dev one"},
            {"role": "developer", "content": "dev two"},
            {"tool_config": {"enable_tools": ["echo"], "hints": {"echo": "short"}}},
            {"image_instructions": {"style": "flat"}},
        ])
        payload = parse_prestage_payload(text)
        assert payload.system == "sys one"
        assert payload.developers == ("dev one", "dev two")
        assert payload.tool_config.enable_tools == ["echo"]
        assert payload.image_instructions == {"style": "flat"}

    def test_last_system_wins(self) -> None:
        payload = parse_prestage_payload('[{"system": "a"}, {"role": "system", "content": "b"}]')
        assert payload.system == "b"

    def test_unknown_and_empty_entries_ignored(self) -> None:
        text = '[{"foo": 1}, 3, {"system": ""}, {"role": "user", "content": "x"}, {"developer": "d"}]'
        payload = parse_prestage_payload(text)
        assert payload.system is None
        assert payload.developers == ("d",)

    def test_malformed_variant_ignored(self) -> None:
        payload = parse_prestage_payload('[{"tool_config": "nope"}, {"system": "s"}]')
        assert payload.tool_config is None
        assert payload.system == "s"

    def test_not_json(self) -> None:
        with pytest.raises(ValueError):
            parse_prestage_payload("Sure! Here is my plan.")

    def test_scalar_json(self) -> None:
        with pytest.raises(ValueError, match="array or object"):
            parse_prestage_payload("42")


# ===========================================================================
# Payload merging
# ===========================================================================

class TestMergePayload:
    SEED = [
        Message(role="system", content="original"),
        Message(role="user", content="question"),
    ]

    def test_replaces_first_system(self) -> None:
        out = merge_prestage_payload(self.SEED, PrestagePayload(system="new"))
        assert out == [Message(role="system", content="new"), self.SEED[1]]

    def test_inserts_system_when_absent(self) -> None:
        out = merge_prestage_payload([self.SEED[1]], PrestagePayload(system="new"))
        assert out[0] == Message(role="system", content="new")

    def test_developers_before_first_user(self) -> None:
        out = merge_prestage_payload(self.SEED, PrestagePayload(developers=("a", "b")))
        assert [m.role for m in out] == ["system", "developer", "developer", "user"]
        assert [m.content for m in out[1:3]] == ["a", "b"]

    def test_appended_when_no_user(self) -> None:
        out = merge_prestage_payload([self.SEED[0]], PrestagePayload(developers=("a",)))
        assert out[-1] == Message(role="developer", content="a")

    def test_tool_config_and_images_as_compact_json(self) -> None:
        payload = PrestagePayload(
            tool_config=ToolConfig(enable_tools=["echo"], hints={"b": 1, "a": 2}),
            image_instructions={"style": "flat"},
        )
        out = merge_prestage_payload(self.SEED, payload)
        assert out[1].content == '{"tool_config":{"enable_tools":["echo"],"hints":{"a":2,"b":1}}}'
        assert out[2].content == '{"image_instructions":{"style":"flat"}}'
        assert out[3].role == "user"

    def test_empty_tool_config_skipped(self) -> None:
        out = merge_prestage_payload(self.SEED, PrestagePayload(tool_config=ToolConfig()))
        assert out == self.SEED

    def test_input_not_mutated(self) -> None:
        seed = list(self.SEED)
        merge_prestage_payload(seed, PrestagePayload(system="new", developers=("d",)))
        assert seed == self.SEED


# ===========================================================================
# Cache
# ===========================================================================

def _key(**overrides) -> str:
    fields = dict(
        model="m",
        base_url="http://x/v1",
        temperature=1.0,
        top_p=None,
        retries=2,
        backoff=0.5,
        tool_spec="builtin",
        messages=[Message(role="user", content="hi")],
    )
    fields.update(overrides)
    return cache_key(**fields)


class TestCacheKey:
    def test_deterministic(self) -> None:
        assert _key() == _key()
        assert len(_key()) == 64

    def test_ignores_whitespace_tool_calls_and_channel(self) -> None:
        noisy = [Message(role="user", content="  hi  ")]
        assert _key(messages=noisy) == _key()
        a = [Message(role="assistant", content="x", channel="critic",
                     tool_calls=(ToolCall(id="1", name="n", arguments="{}"),))]
        b = [Message(role="assistant", content="x")]
        assert _key(messages=a) == _key(messages=b)

    @pytest.mark.parametrize("field,value", [
        ("model", "other"),
        ("base_url", "http://y/v1"),
        ("temperature", 0.5),
        ("retries", 3),
        ("backoff", 1.0),
        ("tool_spec", "external:/tmp/m.json"),
    ])
    def test_sensitive_to_inputs(self, field, value) -> None:
        assert _key(**{field: value}) != _key()

    def test_top_p_replaces_temperature(self) -> None:
        assert _key(top_p=0.9) == _key(top_p=0.9, temperature=0.3)


class TestPrepCache:
    def test_miss_then_hit(self, tmp_path) -> None:
        cache = PrepCache(tmp_path)
        assert cache.read("k") is None
        msgs = [Message(role="user", content="hi"), Message(role="developer", content="d")]
        assert cache.write("k", msgs)
        assert cache.read("k") == msgs
        assert cache.path_for("k") == tmp_path / ".agentrun" / "cache" / "prep" / "k.json"

    def test_expired_entry(self, tmp_path) -> None:
        cache = PrepCache(tmp_path, ttl=60)
        cache.write("k", [Message(role="user", content="hi")])
        old = time.time() - 120
        os.utime(cache.path_for("k"), (old, old))
        assert cache.read("k") is None

    def test_zero_ttl_never_expires(self, tmp_path) -> None:
        cache = PrepCache(tmp_path, ttl=0)
        cache.write("k", [Message(role="user", content="hi")])
        os.utime(cache.path_for("k"), (0, 0))
        assert cache.read("k") is not None

    @pytest.mark.parametrize("content", ["{broken", '{"messages": []}', "[1]"])
    def test_corrupt_entry_is_miss(self, tmp_path, content) -> None:
        cache = PrepCache(tmp_path)
        cache.path_for("k").parent.mkdir(parents=True)
        cache.path_for("k").write_text(content)
        assert cache.read("k") is None

    def test_ttl_from_env(self) -> None:
        assert ttl_from_env({}) == 600.0
        assert ttl_from_env({"AGENTRUN_PREP_CACHE_TTL": "30"}) == 30.0
        assert ttl_from_env({"AGENTRUN_PREP_CACHE_TTL": "2m"}) == 120.0
        assert ttl_from_env({"AGENTRUN_PREP_CACHE_TTL": "1h"}) == 3600.0
        assert ttl_from_env({"AGENTRUN_PREP_CACHE_TTL": "soon"}) == 600.0


# ===========================================================================
# PrestageEngine
# ===========================================================================

SEED = [
    Message(role="system", content="sys"),
    Message(role="user", content="question"),
]


@pytest.fixture
def prep_config(make_config):
    def _make(**prep_kwargs):
        prep_kwargs.setdefault("enabled", True)
        prep_kwargs.setdefault("model", "prep-model")
        return make_config(prep=PrepConfig(**prep_kwargs), model="main-model")

    return _make


def _engine(config, client, stderr=None, environ=None) -> PrestageEngine:
    return PrestageEngine(
        config,
        client_factory=lambda settings: client,
        environ=environ if environ is not None else {},
        stderr=stderr if stderr is not None else io.StringIO(),
    )


class TestPrestageEngine:
    def test_merges_payload(self, prep_config) -> None:
        client = FakeChatClient([chat_response('[{"system": "better"}, {"developer": "hint"}]')])
        outcome = _engine(prep_config(), client).run(SEED)
        assert not outcome.failed
        assert [m.content for m in outcome.messages] == ["better", "hint", "question"]
        assert client.closed
        request = client.requests[0]
        assert request["model"] == "prep-model"
        assert request["temperature"] == 1.0
        assert "top_p" not in request

    def test_prep_system_prepended(self, prep_config) -> None:
        client = FakeChatClient([chat_response("")])
        engine = _engine(prep_config(system="You prepare prompts."), client)
        outcome = engine.run(SEED)
        sent = client.requests[0]["messages"]
        assert sent[0] == {"role": "system", "content": "You prepare prompts."}
        assert sent[1]["content"] == "sys"
        assert outcome.messages == SEED

    def test_request_messages_for_dry_run(self, prep_config) -> None:
        engine = _engine(prep_config(system="prep sys"), FakeChatClient())
        out = engine.request_messages(SEED)
        assert [m.content for m in out] == ["prep sys", "sys", "question"]

    def test_top_p_omits_temperature(self, prep_config) -> None:
        client = FakeChatClient([chat_response("")])
        _engine(prep_config(top_p=0.8), client).run(SEED)
        assert client.requests[0]["top_p"] == 0.8
        assert "temperature" not in client.requests[0]

    def test_non_json_content_keeps_seed(self, prep_config) -> None:
        client = FakeChatClient([chat_response("I would rephrase the question.")])
        assert _engine(prep_config(), client).run(SEED).messages == SEED

    def test_no_choices_keeps_seed(self, prep_config) -> None:
        client = FakeChatClient([{"choices": []}])
        outcome = _engine(prep_config(), client).run(SEED)
        assert outcome.messages == SEED
        assert not outcome.failed

    def test_cache_hit_skips_call(self, prep_config) -> None:
        config = prep_config()
        first = FakeChatClient([chat_response('{"developer": "cached hint"}')])
        one = _engine(config, first).run(SEED)
        second = FakeChatClient()
        two = _engine(config, second).run(SEED)
        assert two.cache_hit
        assert two.messages == one.messages
        assert second.requests == []

    def test_cache_bust_forces_call(self, prep_config) -> None:
        _engine(prep_config(), FakeChatClient([chat_response('{"developer": "a"}')])).run(SEED)
        client = FakeChatClient([chat_response('{"developer": "b"}')])
        outcome = _engine(prep_config(cache_bust=True), client).run(SEED)
        assert not outcome.cache_hit
        assert len(client.requests) == 1
        assert outcome.messages[1].content == "b"

    def test_fail_open_on_network_error(self, prep_config) -> None:
        stderr = io.StringIO()
        client = FakeChatClient([LLMResponseError("chat POST failed: connection refused")])
        outcome = _engine(prep_config(), client, stderr=stderr).run(SEED)
        assert outcome.failed
        assert outcome.messages == SEED
        assert stderr.getvalue() == (
            "WARN: pre-stage failed; skipping (reason: chat POST failed: connection refused)\n"
        )

    def test_fail_open_on_invalid_sequence(self, prep_config) -> None:
        stderr = io.StringIO()
        seed = [Message(role="tool", content="{}", tool_call_id="x")]
        client = FakeChatClient()
        outcome = _engine(prep_config(), client, stderr=stderr).run(seed)
        assert outcome.messages == seed
        assert client.requests == []
        assert stderr.getvalue().startswith("WARN: pre-stage failed; skipping (reason: ")

    def test_builtin_tools_answered(self, prep_config, work_dir) -> None:
        (work_dir / "notes.txt").write_text("remember the milk")
        calls = [
            tool_call_dict("c1", "fs.read_file", {"path": "notes.txt"}),
            tool_call_dict("c2", "env.get", {"key": "HOME"}),
            tool_call_dict("c3", "fs.read_file", {"path": "../etc/passwd"}),
        ]
        client = FakeChatClient([chat_response(tool_calls=calls)])
        outcome = _engine(prep_config(), client, environ={"HOME": "/home/ada"}).run(SEED)
        tools = outcome.messages[-3:]
        assert outcome.messages[-4].role == "assistant"
        assert [t.tool_call_id for t in tools] == ["c1", "c2", "c3"]
        assert json.loads(tools[0].content) == {"content": "remember the milk"}
        assert json.loads(tools[1].content) == {"value": "/home/ada"}
        assert "error" in json.loads(tools[2].content)

    def test_external_tools_without_manifest(self, prep_config) -> None:
        calls = [tool_call_dict("c1", "fs.read_file", {"path": "x"})]
        client = FakeChatClient([chat_response(tool_calls=calls)])
        outcome = _engine(prep_config(allow_external_tools=True), client).run(SEED)
        assert json.loads(outcome.messages[-1].content) == {"error": "unknown tool: fs.read_file"}

    def test_fail_open_on_malformed_manifest(self, prep_config, work_dir) -> None:
        manifest = work_dir / "tools.json"
        manifest.write_text("{not json")
        stderr = io.StringIO()
        calls = [tool_call_dict("c1", "echo", {"text": "hi"})]
        client = FakeChatClient([chat_response(tool_calls=calls)])
        config = prep_config(allow_external_tools=True, tools_path=str(manifest))
        outcome = _engine(config, client, stderr=stderr).run(SEED)
        assert outcome.failed
        assert outcome.messages == SEED
        assert "WARN: pre-stage failed; skipping" in stderr.getvalue()

    def test_verbose_prints_non_final_content(self, make_config) -> None:
        config = make_config(prep=PrepConfig(enabled=True), verbose=True)
        stderr = io.StringIO()
        client = FakeChatClient([chat_response("thinking it over", channel="critic")])
        _engine(config, client, stderr=stderr).run(SEED)
        assert stderr.getvalue() == "thinking it over\n"

    def test_quiet_without_verbose(self, prep_config) -> None:
        stderr = io.StringIO()
        client = FakeChatClient([chat_response("thinking it over", channel="critic")])
        _engine(prep_config(), client, stderr=stderr).run(SEED)
        assert stderr.getvalue() == ""
