import asyncio
import json

import pytest
from pydantic import ValidationError

from forgeline.config_loader import ProvidersConfig, SandboxConfig
from forgeline.providers import (
    AssistantMessage,
    CancellationToken,
    ContentBlock,
    ConversationMessage,
    ErrorMessage,
    ExecuteOptions,
    ResultMessage,
    StreamWatchdog,
    SystemMessage,
    iterate_messages,
    parse_message,
)
from forgeline.providers.claude import ClaudeProvider
from forgeline.providers.codex import CodexProvider, sandbox_mode
from forgeline.providers.cursor import CursorProvider
from forgeline.providers.litellm_provider import build_messages


def options(**overrides):
    base = {"prompt": "Add a flag", "model": "claude-sonnet", "cwd": "/tmp/wt"}
    base.update(overrides)
    return ExecuteOptions(**base)


# ---------------------------------------------------------------------------
# Messages & tokens
# ---------------------------------------------------------------------------

def test_parse_message_dispatches_on_type():
    assert isinstance(parse_message({"type": "result", "result": "ok"}), ResultMessage)
    assert isinstance(parse_message({"type": "error", "error": "boom"}), ErrorMessage)
    assert isinstance(parse_message({"type": "system", "session_id": "s1"}), SystemMessage)
    with pytest.raises(ValidationError):
        parse_message({"type": "mystery"})


def test_assistant_text_joins_text_blocks_only():
    msg = AssistantMessage(content=[
        ContentBlock(text="Hello "),
        ContentBlock(type="tool_use", name="Read"),
        ContentBlock(text="world"),
    ])
    assert msg.text == "Hello world"


@pytest.mark.asyncio
async def test_token_invalidates_only_once():
    token = CancellationToken()
    assert token.invalidate()
    assert not token.invalidate()
    assert token.cancelled


@pytest.mark.asyncio
async def test_token_keeps_first_reason():
    token = CancellationToken()
    token.cancel("user abort")
    token.cancel("shutdown")
    assert token.reason == "user abort"
    assert not token.stop_requested
    token.request_stop()
    assert token.stop_requested


# ---------------------------------------------------------------------------
# Message channel
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_iterate_messages_preserves_order():
    async def stream():
        for i in range(3):
            yield ResultMessage(result=str(i))

    seen = [m.result async for m in iterate_messages(stream())]
    assert seen == ["0", "1", "2"]


@pytest.mark.asyncio
async def test_cancel_stops_a_blocked_stream_and_closes_it():
    token = CancellationToken()
    closed = asyncio.Event()

    async def stream():
        try:
            yield ResultMessage(result="first")
            await asyncio.sleep(60)
            yield ResultMessage(result="never")
        finally:
            closed.set()

    seen = []

    async def consume():
        async for message in iterate_messages(stream(), token):
            seen.append(message.result)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.05)
    token.cancel("abort")
    await asyncio.wait_for(task, timeout=2)

    assert seen == ["first"]
    assert closed.is_set()


@pytest.mark.asyncio
async def test_already_cancelled_token_yields_nothing():
    token = CancellationToken()
    token.cancel()

    async def stream():
        yield ResultMessage(result="x")

    assert [m async for m in iterate_messages(stream(), token)] == []


@pytest.mark.asyncio
async def test_stream_errors_propagate():
    async def stream():
        yield ResultMessage(result="x")
        raise RuntimeError("backend crashed")

    with pytest.raises(RuntimeError):
        async for _ in iterate_messages(stream(), CancellationToken()):
            pass


@pytest.mark.asyncio
async def test_watchdog_reports_a_stall_without_cancelling():
    stalls = []
    async with StreamWatchdog(0.05, on_stall=stalls.append, label="test") as watchdog:
        await asyncio.sleep(0.2)
        assert watchdog.stalled
        watchdog.touch()
        assert not watchdog.stalled
    assert len(stalls) == 1


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------

def test_claude_command_resolves_alias_and_tools():
    provider = ClaudeProvider(ProvidersConfig())
    cmd, stdin = provider.build_command(options(
        allowed_tools=["Read", "Grep"], session_id="abc", system_prompt="Be brief",
    ))

    assert cmd[cmd.index("--model") + 1] == "claude-sonnet-4-5-20250929"
    assert cmd[cmd.index("--allowedTools") + 1] == "Read,Grep"
    assert cmd[cmd.index("--resume") + 1] == "abc"
    assert cmd[-1] == "Add a flag"
    assert stdin is None


def test_claude_sandbox_and_multipart_prompt():
    provider = ClaudeProvider(ProvidersConfig())
    prompt = [{"type": "text", "text": "Look"}, {"type": "image", "source": {"type": "base64", "data": "AA"}}]
    cmd, stdin = provider.build_command(options(prompt=prompt, sandbox=SandboxConfig(enabled=True)))

    settings = json.loads(cmd[cmd.index("--settings") + 1])
    assert settings["sandbox"]["enabled"] is True
    assert "--input-format" in cmd
    assert json.loads(stdin)["message"]["content"] == prompt


def test_claude_history_is_inlined_without_session():
    provider = ClaudeProvider(ProvidersConfig())
    history = [ConversationMessage(role="user", content="earlier question")]
    cmd, _ = provider.build_command(options(conversation_history=history))
    assert "USER: earlier question" in cmd[-1]

    cmd, _ = provider.build_command(options(conversation_history=history, session_id="s"))
    assert cmd[-1] == "Add a flag"


def test_claude_events_are_normalized():
    normalize = ClaudeProvider.normalize
    system = normalize({"type": "system", "subtype": "init", "session_id": "s1", "cwd": "/x"})
    assert system.session_id == "s1" and system.data == {"cwd": "/x"}

    assistant = normalize({"type": "assistant", "message": {"content": [
        {"type": "text", "text": "hi"},
        {"type": "tool_use", "name": "Edit", "input": {"file_path": "a.py"}},
        {"type": "image"},
    ]}})
    assert [b.type for b in assistant.content] == ["text", "tool_use"]

    failed = normalize({"type": "result", "subtype": "error_max_turns", "is_error": True})
    assert failed.subtype == "error"
    assert failed.result == "error_max_turns"

    assert normalize({"type": "user"}) is None


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------

def test_codex_sandbox_follows_tools():
    assert sandbox_mode(options(allowed_tools=["Read", "Grep"])) == "read-only"
    assert sandbox_mode(options(allowed_tools=["Read", "Edit"], sandbox=SandboxConfig(enabled=True))) == "workspace-write"
    assert sandbox_mode(options()) == "danger-full-access"


def test_codex_command_resumes_and_prepends_system_prompt():
    cmd = CodexProvider(ProvidersConfig()).build_command(
        options(model="gpt-5", session_id="t-1", system_prompt="Rules"),
    )
    assert cmd[1:4] == ["exec", "resume", "t-1"]
    assert cmd[cmd.index("--cd") + 1] == "/tmp/wt"
    assert cmd[-1].startswith("Rules\n\n")


def test_codex_events_are_normalized():
    state = {}
    normalize = CodexProvider.normalize

    started = normalize({"type": "thread.started", "thread_id": "t-9"}, state)
    assert started.session_id == "t-9"

    text = normalize({"type": "item.completed", "item": {"type": "agent_message", "text": "done"}}, state)
    assert text.text == "done"

    command = normalize({"type": "item.completed", "item": {"type": "command_execution", "command": "ls"}}, state)
    assert command.content[0].name == "Bash"

    result = normalize({"type": "turn.completed"}, state)
    assert result.result == "done" and result.session_id == "t-9"

    failed = normalize({"type": "turn.failed", "error": {"message": "quota exceeded"}}, state)
    assert isinstance(failed, ErrorMessage)
    assert failed.error == "quota exceeded"

    assert normalize({"type": "item.started"}, state) is None


# ---------------------------------------------------------------------------
# Cursor
# ---------------------------------------------------------------------------

def test_cursor_command_omits_auto_model():
    provider = CursorProvider(ProvidersConfig(cursor_cli="cursor-agent-not-installed"))
    assert "--model" not in provider.build_command(options(model="auto"))
    cmd = provider.build_command(options(model="gpt-5"))
    assert cmd[cmd.index("--model") + 1] == "gpt-5"


def test_cursor_tool_calls_are_normalized():
    normalize = CursorProvider.normalize
    started = normalize({
        "type": "tool_call", "subtype": "started", "call_id": "c1",
        "tool_call": {"readToolCall": {"args": {"path": "a.py"}}},
    })
    assert started.content[0].name == "Read"
    assert started.content[0].input == {"file_path": "a.py"}

    completed = normalize({
        "type": "tool_call", "subtype": "completed", "call_id": "c1",
        "tool_call": {"writeToolCall": {"result": {"success": {"linesCreated": 3, "path": "b.py"}}}},
    })
    assert completed.content[0].content == "Wrote 3 lines to b.py"

    error = normalize({"type": "result", "is_error": True, "error": "not logged in"})
    assert isinstance(error, ErrorMessage) and error.error == "not logged in"


# ---------------------------------------------------------------------------
# LiteLLM
# ---------------------------------------------------------------------------

def test_litellm_messages_include_system_history_and_images():
    history = [ConversationMessage(role="assistant", content="earlier answer")]
    prompt = [
        {"type": "text", "text": "What is this?"},
        {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AA"}},
    ]
    messages = build_messages(options(prompt=prompt, system_prompt="sys", conversation_history=history))

    assert [m["role"] for m in messages] == ["system", "assistant", "user"]
    assert messages[-1]["content"][1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AA"}}
