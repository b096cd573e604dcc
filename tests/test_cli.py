"""CLI tests for agentrun via Click's CliRunner.

Model traffic is replaced by a FakeChatClient patched in place of
OpenAIClient; every run happens inside runner.isolated_filesystem() so
caches and saved transcripts land in a scratch directory.
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from agentrun._version import __version__
from agentrun.cli import cli

from tests.conftest import FakeChatClient, chat_response, tool_call_dict


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def runner():
    """Create a Click test runner with a clean model environment."""
    return CliRunner(env={
        "OAI_MODEL": None,
        "OAI_BASE_URL": None,
        "OAI_API_KEY": None,
        "OPENAI_API_KEY": None,
        "OAI_HTTP_TIMEOUT": None,
        "AGENTRUN_AUDIT_LOG": None,
        "AGENTRUN_PREP_CACHE_TTL": None,
    })


@pytest.fixture
def fake_client(monkeypatch):
    """Patch the CLI's OpenAIClient; returns a holder for the scripted client."""
    holder: dict = {"client": FakeChatClient(), "args": None, "kwargs": None}

    def factory(*args, **kwargs):
        holder["args"] = args
        holder["kwargs"] = kwargs
        return holder["client"]

    monkeypatch.setattr("agentrun.cli.OpenAIClient", factory)
    return holder


# ---------------------------------------------------------------------------
# Usage errors
# ---------------------------------------------------------------------------

class TestUsage:
    def test_missing_prompt(self, runner) -> None:
        result = runner.invoke(cli, ["--no-prep"])
        assert result.exit_code == 2
        assert "missing required --prompt" in result.stderr

    def test_blank_prompt(self, runner) -> None:
        result = runner.invoke(cli, ["-p", "   "])
        assert result.exit_code == 2

    def test_bad_channel_route(self, runner) -> None:
        result = runner.invoke(cli, ["-p", "hi", "--channel-route", "critic=file"])
        assert result.exit_code == 2
        assert "destination 'file'" in result.stderr

    def test_bad_duration(self, runner) -> None:
        result = runner.invoke(cli, ["-p", "hi", "--http-timeout", "soon"])
        assert result.exit_code == 2
        assert "not a valid duration" in result.stderr

    def test_load_with_prompt(self, runner) -> None:
        with runner.isolated_filesystem():
            with open("t.json", "w") as fh:
                fh.write('[{"role": "user", "content": "hi"}]')
            result = runner.invoke(cli, ["-p", "hi", "--load-messages", "t.json"])
        assert result.exit_code == 2
        assert "cannot be combined" in result.stderr

    def test_unreadable_load_file(self, runner) -> None:
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["--load-messages", "missing.json"])
        assert result.exit_code == 2
        assert result.stderr.startswith("error:")

    def test_malformed_load_file(self, runner) -> None:
        with runner.isolated_filesystem():
            with open("t.json", "w") as fh:
                fh.write("not json")
            result = runner.invoke(cli, ["--load-messages", "t.json"])
        assert result.exit_code == 2
        assert "parse messages JSON" in result.stderr

    def test_empty_base_url(self, runner) -> None:
        result = runner.invoke(cli, ["-p", "hi", "--no-prep", "--base-url", " "])
        assert result.exit_code == 2
        assert "No base URL" in result.stderr

    def test_version(self, runner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


# ---------------------------------------------------------------------------
# Pre-stage dry run
# ---------------------------------------------------------------------------

class TestPrepDryRun:
    def test_prints_request_messages(self, runner) -> None:
        with runner.isolated_filesystem():
            result = runner.invoke(cli, [
                "-p", "hello", "--system", "sys", "--developer", "dev",
                "--prep-system", "prepare", "--prep-dry-run",
            ])
        assert result.exit_code == 0
        messages = json.loads(result.stdout)
        assert messages == [
            {"role": "system", "content": "prepare"},
            {"role": "system", "content": "sys"},
            {"role": "developer", "content": "dev"},
            {"role": "user", "content": "hello"},
        ]

    def test_prompt_from_stdin(self, runner) -> None:
        with runner.isolated_filesystem():
            result = runner.invoke(
                cli, ["--prompt-file", "-", "--prep-dry-run"], input="  from stdin \n",
            )
        assert result.exit_code == 0
        assert json.loads(result.stdout)[-1] == {"role": "user", "content": "from stdin"}

    def test_system_file(self, runner) -> None:
        with runner.isolated_filesystem():
            with open("sys.txt", "w") as fh:
                fh.write("file system prompt")
            result = runner.invoke(cli, ["-p", "q", "--system-file", "sys.txt", "--prep-dry-run"])
        assert json.loads(result.stdout)[0]["content"] == "file system prompt"


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

class TestRun:
    def test_final_answer(self, runner, fake_client) -> None:
        fake_client["client"] = FakeChatClient([chat_response("done")])
        with runner.isolated_filesystem():
            result = runner.invoke(cli, [
                "-p", "hi", "--no-prep", "--model", "gpt-4o-mini",
                "--base-url", "http://test-api/v1", "--http-timeout", "5s",
            ])
        assert result.exit_code == 0
        assert result.stdout == "done\n"
        assert fake_client["client"].closed
        assert fake_client["args"] == ("http://test-api/v1", None)
        assert fake_client["kwargs"]["timeout"] == 5.0
        request = fake_client["client"].requests[0]
        assert request["model"] == "gpt-4o-mini"
        assert request["temperature"] == 1.0

    def test_exhaustion_exit_one(self, runner, fake_client) -> None:
        fake_client["client"] = FakeChatClient([chat_response("")])
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["-p", "hi", "--no-prep", "--max-steps", "1"])
        assert result.exit_code == 1
        assert "info: reached maximum steps (1); needs human review" in result.stderr

    def test_top_p_warning(self, runner, fake_client) -> None:
        fake_client["client"] = FakeChatClient([chat_response("done")])
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["-p", "hi", "--no-prep", "--top-p", "0.9"])
        assert result.exit_code == 0
        assert "omitting temperature per one-knob rule" in result.stderr
        assert "temperature" not in fake_client["client"].requests[0]

    def test_verbose_channel_route(self, runner, fake_client) -> None:
        fake_client["client"] = FakeChatClient([
            chat_response("second opinion", channel="critic"),
            chat_response("done"),
        ])
        with runner.isolated_filesystem():
            result = runner.invoke(cli, [
                "-p", "hi", "--no-prep", "-v", "--channel-route", "critic=stdout",
            ])
        assert result.exit_code == 0
        assert result.stdout == "second opinion\ndone\n"

    def test_chat_failure_exit_one(self, runner, fake_client) -> None:
        from agentrun.llm.errors import LLMAuthError

        fake_client["client"] = FakeChatClient([LLMAuthError("Authentication failed: HTTP 401")])
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["-p", "hi", "--no-prep"])
        assert result.exit_code == 1
        assert "error: chat call failed: Authentication failed" in result.stderr

    def test_stream_connection_failure_exit_one(self, runner, fake_client) -> None:
        import httpx

        from agentrun.llm import OpenAIClient

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        client = OpenAIClient("http://test-api/v1", retries=0)
        client._client = httpx.Client(transport=httpx.MockTransport(handler))
        fake_client["client"] = client
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["-p", "hi", "--no-prep", "--stream-final"])
        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "error: chat call failed: chat stream failed: connection refused" in result.stderr

    def test_manifest_error_exit_one(self, runner, fake_client) -> None:
        with runner.isolated_filesystem():
            with open("tools.json", "w") as fh:
                fh.write('{"tools": [{"name": "echo", "command": []}]}')
            result = runner.invoke(cli, ["-p", "hi", "--no-prep", "--tools", "tools.json"])
        assert result.exit_code == 1
        assert result.stderr.startswith("error:")
        assert fake_client["client"].requests == []

    def test_tool_manifest_round_trip(self, runner, fake_client, tmp_path) -> None:
        import sys

        script = tmp_path / "echo_tool.py"
        script.write_text("import sys\nsys.stdout.write(sys.stdin.read())\n")
        manifest = tmp_path / "tools.json"
        manifest.write_text(json.dumps({"tools": [{
            "name": "echo",
            "description": "Echo the arguments",
            "schema": {"type": "object", "properties": {"text": {"type": "string"}}},
            "command": [sys.executable, str(script)],
        }]}))
        fake_client["client"] = FakeChatClient([
            chat_response(tool_calls=[tool_call_dict("c1", "echo", {"text": "hi"})]),
            chat_response("done"),
        ])
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["-p", "hi", "--no-prep", "--tools", str(manifest)])
        assert result.exit_code == 0, result.stderr
        assert result.stdout == "done\n"
        requests = fake_client["client"].requests
        assert requests[0]["tools"][0]["function"]["name"] == "echo"
        tool_msg = requests[1]["messages"][-1]
        assert tool_msg["role"] == "tool"
        assert tool_msg["tool_call_id"] == "c1"
        assert json.loads(tool_msg["content"]) == {"text": "hi"}


# ---------------------------------------------------------------------------
# Transcript files
# ---------------------------------------------------------------------------

class TestTranscriptFiles:
    def test_save_and_print(self, runner, fake_client) -> None:
        fake_client["client"] = FakeChatClient([chat_response("done")])
        with runner.isolated_filesystem():
            result = runner.invoke(cli, [
                "-p", "hi", "--system", "sys", "--no-prep",
                "--save-messages", "out/t.json", "--print-messages",
            ])
            with open("out/t.json") as fh:
                saved = json.load(fh)
        assert result.exit_code == 0
        assert saved == {"messages": [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]}
        assert '"role": "system"' in result.stderr
        assert result.stdout == "done\n"

    def test_save_records_prestage_metadata(self, runner, fake_client) -> None:
        fake_client["client"] = FakeChatClient([chat_response("done")])
        with runner.isolated_filesystem():
            with open("t.json", "w") as fh:
                fh.write('[{"role": "user", "content": "hi"}]')
            result = runner.invoke(cli, [
                "--load-messages", "t.json", "--prep-profile", "deterministic",
                "--save-messages", "saved.json",
            ])
            with open("saved.json") as fh:
                saved = json.load(fh)
        assert result.exit_code == 0
        assert saved["prestage"] == {"enabled": True, "profile": "deterministic"}

    def test_loaded_transcript_skips_prestage(self, runner, fake_client, monkeypatch) -> None:
        def no_prep(settings):
            raise AssertionError("pre-stage must not run for loaded transcripts")

        monkeypatch.setattr("agentrun.prestage.engine.default_client_factory", no_prep)
        fake_client["client"] = FakeChatClient([chat_response("done")])
        with runner.isolated_filesystem():
            with open("t.json", "w") as fh:
                fh.write(json.dumps({"messages": [
                    {"role": "system", "content": "sys"},
                    {"role": "user", "content": "hi"},
                ]}))
            result = runner.invoke(cli, ["--load-messages", "t.json"])
        assert result.exit_code == 0
        assert "WARN" not in result.stderr
        sent = fake_client["client"].requests[0]["messages"]
        assert [m["role"] for m in sent] == ["system", "user"]
