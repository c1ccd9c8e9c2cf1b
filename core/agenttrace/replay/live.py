"""Live LLM calls for replay.

The replay engine only talks to models through the LLMCaller protocol. The
shipped implementation goes through LiteLLM, so any provider LiteLLM
supports can be used by model name (``gpt-4o-mini``,
``anthropic/claude-3-haiku-20240307``, ``gemini/gemini-1.5-flash``, ...).

Configuration is read from the environment (a ``.env`` file is loaded
first):

    AGENTTRACE_LIVE_MODEL      default model when a node has none
    AGENTTRACE_LIVE_API_BASE   custom endpoint
    AGENTTRACE_LIVE_TIMEOUT    per-call timeout in seconds
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

import litellm
from dotenv import load_dotenv

from agenttrace.errors import ReplayCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LIVE_MODEL = "gpt-4o-mini"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class CancellationToken:
    """Cooperative cancellation signal shared by a replay and its calls."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T],
    token: CancellationToken | None = None,
    timeout: float | None = None,
) -> T:
    """Await ``awaitable`` unless the token fires or the timeout passes first.

    The abandoned call is cancelled; nothing else is affected.

    Raises:
        ReplayCancelledError: If the token was cancelled first.
        TimeoutError: If the timeout passed first.
    """
    task = asyncio.ensure_future(awaitable)
    if token is None:
        return await asyncio.wait_for(task, timeout=timeout)
    if token.cancelled:
        task.cancel()
        raise ReplayCancelledError(token.reason or "cancelled")

    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    if waiter in done:
        raise ReplayCancelledError(token.reason or "cancelled")
    raise TimeoutError(f"Live call did not finish within {timeout}s")


@dataclass
class LiveLLMConfig:
    """Settings for live model calls."""

    default_model: str = DEFAULT_LIVE_MODEL
    api_base: str | None = None
    timeout_seconds: float = 60.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    def to_dict(self) -> dict[str, Any]:
        return {
            "default_model": self.default_model,
            "api_base": self.api_base,
            "timeout_seconds": self.timeout_seconds,
            "system_prompt": self.system_prompt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LiveLLMConfig:
        return cls(
            default_model=data.get("default_model", DEFAULT_LIVE_MODEL),
            api_base=data.get("api_base"),
            timeout_seconds=data.get("timeout_seconds", 60.0),
            system_prompt=data.get("system_prompt", DEFAULT_SYSTEM_PROMPT),
        )

    @classmethod
    def from_env(cls) -> LiveLLMConfig:
        load_dotenv()
        return cls(
            default_model=os.getenv("AGENTTRACE_LIVE_MODEL", DEFAULT_LIVE_MODEL),
            api_base=os.getenv("AGENTTRACE_LIVE_API_BASE") or None,
            timeout_seconds=float(os.getenv("AGENTTRACE_LIVE_TIMEOUT", "60")),
        )


@runtime_checkable
class LLMCaller(Protocol):
    """Collaborator that performs one chat completion and returns its text."""

    async def __call__(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
        cancel_token: CancellationToken | None = None,
    ) -> str: ...


class LiteLLMCaller:
    """LLMCaller backed by ``litellm.acompletion``."""

    def __init__(self, config: LiveLLMConfig | None = None) -> None:
        self.config = config or LiveLLMConfig()

    async def __call__(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model or self.config.default_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base

        logger.debug(f"Live replay call to {kwargs['model']} ({len(messages)} messages)")
        response = await run_cancellable(
            litellm.acompletion(**kwargs),
            cancel_token,
            timeout=self.config.timeout_seconds,
        )
        return response.choices[0].message.content or ""
