"""Tests for ClaudeProvider."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from eve.engine.providers.base import CommandOutcome, ProviderContext, TurnPhase
from eve.engine.providers.claude_provider import (
    ClaudeProvider,
    format_args_for_display,
    parse_quoted_args,
    remove_custom_arg,
)
from eve.shared.models.message import AssistantTurn, Attachment, Encoding, ToolUseBlock
from eve.shared.models.session import Session


def _provider(recorder, tmp_path, **options) -> ClaudeProvider:
    session = Session(directory=str(tmp_path), model="haiku")
    session.bind_client(recorder)
    recorder.frames.clear()
    return ClaudeProvider(session, ProviderContext(command_path="claude", options=options))


def _line(obj) -> str:
    return json.dumps(obj) + "\n"


def test_build_command_includes_resume_and_custom_args(recorder, tmp_path):
    provider = _provider(recorder, tmp_path, extra_args=["--allowedTools", "Read"])
    provider.resume_token = "tok-1"
    cmd = provider.build_command()
    assert cmd[0] == "claude"
    assert cmd[1:6] == ["--print", "--output-format", "stream-json", "--input-format", "stream-json"]
    assert cmd[cmd.index("--model") + 1] == "haiku"
    assert cmd[cmd.index("--resume") + 1] == "tok-1"
    assert cmd[-2:] == ["--allowedTools", "Read"]


def test_full_turn_commits_transcript_and_completes(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    assert provider.begin_turn()
    provider.feed(_line({"type": "system", "subtype": "init", "session_id": "cli-123"}))
    provider.feed(_line({
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": "Hello"}, {"type": "tool_use", "name": "Read", "input": {"p": 1}}]},
    }))
    provider.feed(_line({
        "type": "result",
        "usage": {"input_tokens": 10, "output_tokens": 4},
        "total_cost_usd": 0.01,
        "modelUsage": {"claude-haiku": {"contextWindow": 100_000}},
    }))

    session = provider.session
    assert provider.resume_token == "cli-123"
    assert session.provider_state == {"claudeSessionId": "cli-123", "customArgs": []}
    assert len(session.messages) == 1
    turn = session.messages[0]
    assert isinstance(turn, AssistantTurn)
    assert turn.text == "Hello"
    assert isinstance(turn.blocks[1], ToolUseBlock)
    assert session.stats.input_tokens == 10
    assert session.stats.context_window == 100_000
    assert session.stats.cost_usd == 0.01
    assert session.processing is False

    types = recorder.types()
    assert types[-2:] == ["stats_update", "message_complete"]
    assert types.count("message_complete") == 1
    assert recorder.of_type("stats_update")[-1]["stats"]["costUsd"] == 0.01


def test_partial_lines_are_buffered(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    text = _line({"type": "system", "subtype": "init", "session_id": "abc"})
    provider.feed(text[:10])
    assert recorder.frames == []
    provider.feed(text[10:])
    assert recorder.of_type("llm_event")[0]["event"]["session_id"] == "abc"


def test_non_json_line_becomes_raw_output(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    provider.begin_turn()
    provider.feed("Loading credentials...\n[1, 2]\n")
    assert [f["text"] for f in recorder.of_type("raw_output")] == ["Loading credentials...", "[1, 2]"]
    assert provider.turn_open
    assert provider.session.processing is True


def test_result_text_without_assistant_becomes_system_message(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    provider.begin_turn()
    provider.feed(_line({"type": "result", "result": "Total cost: $0.00"}))
    assert recorder.of_type("system_message")[0]["message"] == "Total cost: $0.00"
    assert provider.session.messages == []
    assert recorder.types()[-1] == "message_complete"


def test_local_command_stdout_echo_completes_turn(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    provider.begin_turn()
    provider.feed(_line({
        "type": "user",
        "message": {"content": "<local-command-stdout>Context: 12%</local-command-stdout>"},
    }))
    assert recorder.of_type("system_message")[0]["message"] == "Context: 12%"
    assert recorder.types()[-1] == "message_complete"
    assert not provider.turn_open


def test_second_turn_while_busy_is_rejected(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    assert provider.begin_turn()
    assert provider.begin_turn() is False
    assert recorder.of_type("error")[0]["message"] == "Please wait for the current response to complete"


def test_build_content_with_attachments():
    image = Attachment("a.png", "image/png", Encoding.BASE64, "aGk=")
    text = Attachment("notes.txt", "text/plain", Encoding.UTF8, "body")
    content = ClaudeProvider.build_content("question", [image, text])
    assert content[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "aGk="}
    assert content[1]["text"] == '<file name="notes.txt">\nbody\n</file>'
    assert content[-1] == {"type": "text", "text": "question"}
    assert ClaudeProvider.build_content("plain", []) == "plain"


@pytest.mark.asyncio
async def test_send_spawns_and_streams(recorder, tmp_path, fake_process, wait_until):
    provider = _provider(recorder, tmp_path)
    proc = fake_process()
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as mock_exec:
        await provider.start()
        await provider.send("hi", [])

    args, kwargs = mock_exec.call_args
    assert args[0] == "claude"
    assert kwargs["cwd"] == str(tmp_path)
    assert json.loads(proc.written()[0]) == {"type": "user", "message": {"role": "user", "content": "hi"}}
    assert provider.phase is TurnPhase.STREAMING

    proc.emit(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Hey"}]}}))
    proc.emit(json.dumps({"type": "result", "usage": {"input_tokens": 1, "output_tokens": 1}}))
    await wait_until(lambda: "message_complete" in recorder.types())
    assert provider.session.messages[0].text == "Hey"

    await provider.kill()
    assert proc.returncode == -15
    assert not provider.running


@pytest.mark.asyncio
async def test_process_exit_mid_turn_reports_once(recorder, tmp_path, fake_process, wait_until):
    provider = _provider(recorder, tmp_path)
    proc = fake_process()
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        await provider.send("hi", [])
    proc.exit(1)
    await wait_until(lambda: "process_exited" in recorder.types())
    assert recorder.of_type("process_exited") == [{"type": "process_exited", "code": 1, "sessionId": provider.session.session_id}]
    assert provider.session.processing is False
    assert "message_complete" not in recorder.types()


@pytest.mark.asyncio
async def test_resume_failure_drops_token(recorder, tmp_path, fake_process, wait_until):
    provider = _provider(recorder, tmp_path)
    provider.restore({"claudeSessionId": "stale", "customArgs": []})
    proc = fake_process()
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as mock_exec:
        await provider.send("hi", [])
    assert "--resume" in mock_exec.call_args.args

    proc.exit(1)
    await wait_until(lambda: "process_exited" in recorder.types())
    assert provider.resume_token is None
    assert provider.session.provider_state is None
    assert "--resume" not in provider.build_command()


@pytest.mark.asyncio
async def test_spawn_failure_fails_turn(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError())):
        await provider.send("hi", [])
    errors = recorder.of_type("error")
    assert len(errors) == 1
    assert "CLI not found" in errors[0]["message"]
    assert provider.session.processing is False


@pytest.mark.asyncio
async def test_transfer_requires_token(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    replies = []
    result = await provider.handle_command("transfer-cli", [], replies.append)
    assert result.outcome is CommandOutcome.HANDLED
    assert "No active Claude session to transfer" in replies[0]

    provider.resume_token = "tok"
    provider.custom_args = ["--verbose"]
    result = await provider.handle_command("transfer-cli", [], replies.append)
    assert result.outcome is CommandOutcome.TRANSFER
    assert result.transfer.terminal_args() == ["--resume", "tok", "--model", "haiku", "--verbose"]


@pytest.mark.asyncio
async def test_args_add_restarts_and_persists(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    replies = []
    with patch.object(ClaudeProvider, "restart", AsyncMock()) as restart:
        await provider.handle_command("args", ["add", "--add-dir", '"/tmp/my', 'dir"'], replies.append)
    restart.assert_awaited_once()
    assert provider.custom_args == ["--add-dir", "/tmp/my dir"]
    assert provider.session.provider_state["customArgs"] == ["--add-dir", "/tmp/my dir"]


@pytest.mark.asyncio
async def test_model_switch_drops_token(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    provider.resume_token = "tok"
    replies = []
    with patch.object(ClaudeProvider, "start", AsyncMock()):
        await provider.handle_command("model", ["opus"], replies.append)
    assert provider.session.model == "opus"
    assert provider.resume_token is None
    assert replies[-1].startswith("Switched to opus")

    await provider.handle_command("model", ["gpt"], replies.append)
    assert replies[-1].startswith("Unknown model: gpt")


def test_custom_arg_helpers():
    assert parse_quoted_args('--a "x y" --b') == ["--a", "x y", "--b"]
    assert parse_quoted_args('--a "unterminated') == ["--a", '"unterminated']
    args = ["--allowedTools", "Read", "Write", "--verbose"]
    assert remove_custom_arg(args, "--allowedTools") == ["--verbose"]
    assert remove_custom_arg(args, "--missing") == args
    assert format_args_for_display(["--a", "x y", "--b"]) == "--a 'x y'\n--b"
