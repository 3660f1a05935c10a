"""
FORGELINE Provider Contract

Every agent backend implements BaseProvider:
  - execute_query()       — one streaming run, yields ProviderMessage
  - detect_installation() — cheap probe, never spends quota
  - get_available_models()
  - supports_feature()

Messages are a discriminated union tagged by `type`. The scheduler
never talks to a backend directly; it goes through iterate_messages(),
which races the stream against the run's CancellationToken.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from abc import ABC, abstractmethod
from typing import Annotated, Any, AsyncIterator, Callable, Literal, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from forgeline.config_loader import ProvidersConfig, SandboxConfig


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class ContentBlock(BaseModel):
    type: Literal["text", "tool_use", "tool_result", "thinking"] = "text"
    text: str | None = None
    thinking: str | None = None
    name: str | None = None
    input: Any = None
    tool_use_id: str | None = None
    content: Any = None


class AssistantMessage(BaseModel):
    type: Literal["assistant"] = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)
    session_id: str | None = None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if b.type == "text" and b.text)


class ResultMessage(BaseModel):
    type: Literal["result"] = "result"
    subtype: Literal["success", "error"] = "success"
    result: str = ""
    session_id: str | None = None


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: str
    raw: str | None = None
    session_id: str | None = None


class SystemMessage(BaseModel):
    type: Literal["system"] = "system"
    subtype: str = "init"
    session_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


ProviderMessage = Annotated[
    Union[AssistantMessage, ResultMessage, ErrorMessage, SystemMessage],
    Field(discriminator="type"),
]

message_adapter: TypeAdapter[ProviderMessage] = TypeAdapter(ProviderMessage)


def parse_message(data: dict[str, Any]) -> ProviderMessage:
    return message_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """
    One per running task. cancel() is observable by every await on
    wait(); invalidate() retires the token and may happen only once.
    """

    def __init__(self) -> None:
        self.token_id = uuid.uuid4().hex
        self._event = asyncio.Event()
        self._invalidated = False
        self._stop_requested = False
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def request_stop(self) -> None:
        """Ask the consumer to stop after the message it is handling."""
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    async def wait(self) -> None:
        await self._event.wait()

    def invalidate(self) -> bool:
        """Release the token. Returns False if it was already released."""
        if self._invalidated:
            logger.warning(f"[PROVIDER] Token {self.token_id[:8]} invalidated twice")
            return False
        self._invalidated = True
        # Stragglers still holding the token see it as cancelled.
        self._event.set()
        return True


# ---------------------------------------------------------------------------
# Options / catalogs
# ---------------------------------------------------------------------------

class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str | list[dict[str, Any]]


class ExecuteOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    prompt: str | list[dict[str, Any]]
    model: str
    cwd: str
    system_prompt: str | None = None
    max_turns: int = 20
    allowed_tools: list[str] | None = None
    token: CancellationToken | None = None
    conversation_history: list[ConversationMessage] = Field(default_factory=list)
    session_id: str | None = None
    sandbox: SandboxConfig | None = None


class InstallationStatus(BaseModel):
    installed: bool
    path: str | None = None
    version: str | None = None
    method: Literal["cli", "sdk", "http"] = "cli"
    has_api_key: bool = False
    authenticated: bool = False
    error: str | None = None


class ModelDefinition(BaseModel):
    id: str
    name: str
    model_string: str
    provider: str
    description: str = ""
    context_window: int | None = None
    max_output_tokens: int | None = None
    supports_vision: bool = False
    supports_tools: bool = True
    tier: Literal["basic", "standard", "premium"] = "standard"
    default: bool = False


def prompt_text(prompt: str | list[dict[str, Any]]) -> str:
    """Flatten a multi-part prompt to its text parts."""
    if isinstance(prompt, str):
        return prompt
    return "\n".join(p["text"] for p in prompt if p.get("type") == "text" and p.get("text"))


def render_history(history: list[ConversationMessage]) -> str:
    lines = []
    for msg in history:
        body = msg.content if isinstance(msg.content, str) else prompt_text(msg.content)
        lines.append(f"{msg.role.upper()}: {body}")
    return "\n\n".join(lines)


# ---------------------------------------------------------------------------
# Base provider
# ---------------------------------------------------------------------------

class BaseProvider(ABC):
    """
    Base class for all FORGELINE agent backends.

    Subclasses define:
      - name: str — registry key
      - features: frozenset — capability flags for supports_feature()
      - execute_query() — async generator of ProviderMessage
    """

    name: str = "base"
    features: frozenset[str] = frozenset({"text"})

    def __init__(self, config: ProvidersConfig | None = None):
        self.config = config or ProvidersConfig()

    @abstractmethod
    def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        """Stream a single agent run."""
        ...

    @abstractmethod
    async def detect_installation(self) -> InstallationStatus:
        ...

    @abstractmethod
    def get_available_models(self) -> list[ModelDefinition]:
        ...

    def supports_feature(self, name: str) -> bool:
        return name in self.features

    def owns_model(self, model: str) -> bool:
        return any(model in (m.id, m.model_string) for m in self.get_available_models())

    def build_prompt(self, options: ExecuteOptions) -> str:
        """Prompt text with prior history inlined when there is no session to resume."""
        text = prompt_text(options.prompt)
        if options.conversation_history and not options.session_id:
            return f"Previous conversation:\n\n{render_history(options.conversation_history)}\n\n---\n\n{text}"
        return text


# ---------------------------------------------------------------------------
# Message channel
# ---------------------------------------------------------------------------

async def iterate_messages(
    stream: AsyncIterator[ProviderMessage],
    token: CancellationToken | None = None,
) -> AsyncIterator[ProviderMessage]:
    """
    Yield messages in emission order until the stream closes or the
    token fires. On cancellation the pending read is cancelled and the
    backend stream is closed, which stops its subprocess.
    """
    iterator = stream.__aiter__()
    cancel_wait = asyncio.ensure_future(token.wait()) if token else None
    try:
        while True:
            if token and token.cancelled:
                return
            next_msg = asyncio.ensure_future(iterator.__anext__())
            waiters = {next_msg} | ({cancel_wait} if cancel_wait else set())
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

            if next_msg not in done:
                next_msg.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_msg
                logger.debug("[PROVIDER] Stream cancelled by token")
                return

            try:
                message = next_msg.result()
            except StopAsyncIteration:
                return
            yield message
    finally:
        if cancel_wait:
            cancel_wait.cancel()
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


class StreamWatchdog:
    """
    Flags a stream that has been silent for `idle_seconds`.

    Observability only: it logs and calls on_stall, it never cancels.
    """

    def __init__(
        self,
        idle_seconds: float,
        on_stall: Callable[[float], None] | None = None,
        label: str = "",
    ):
        self.idle_seconds = idle_seconds
        self.on_stall = on_stall
        self.label = label
        self.stalled = False
        self._last = time.monotonic()
        self._task: asyncio.Task | None = None

    def touch(self) -> None:
        self._last = time.monotonic()
        self.stalled = False

    @property
    def idle_for(self) -> float:
        return time.monotonic() - self._last

    async def _watch(self) -> None:
        interval = max(min(self.idle_seconds / 4, 5.0), 0.01)
        while True:
            await asyncio.sleep(interval)
            idle = self.idle_for
            if idle >= self.idle_seconds and not self.stalled:
                self.stalled = True
                logger.warning(f"[PROVIDER] {self.label} no messages for {idle:.0f}s")
                if self.on_stall:
                    self.on_stall(idle)

    async def __aenter__(self) -> "StreamWatchdog":
        self.touch()
        if self.idle_seconds > 0:
            self._task = asyncio.create_task(self._watch())
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
