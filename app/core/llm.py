"""Text-generation client for the pipeline's LLM stages.

Wraps AsyncAnthropic with the two modes the stages need:
- single-shot: one request, the whole text at once
- streaming: raw stream events, text deltas handed to ``on_chunk`` in order

Transient provider failures (connection, timeout, 429, 5xx) are retried with
exponential backoff. A stream is only retried while no text has been emitted.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from anthropic import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
    InternalServerError,
    RateLimitError,
)

from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.pipeline_errors import GenerationError
from app.core.schemas_pipeline import GenerationMode

logger = get_logger(__name__)

_TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, InternalServerError, RateLimitError)
_OVERLOADED_STATUS = 529

ChunkCallback = Callable[[str], Awaitable[None] | None]


@dataclass
class GenerationResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0


class _PrematureStreamEnd(Exception):
    pass


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, _TRANSIENT_ERRORS):
        return True
    return isinstance(exc, APIStatusError) and exc.status_code == _OVERLOADED_STATUS


def _status_of(exc: Exception) -> int | None:
    return getattr(exc, "status_code", None)


class GenerationClient:
    """Anthropic-backed generation with retry and streaming support."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        client: Any = None,
    ):
        settings = get_settings()
        self.model = model or settings.PIPELINE_MODEL
        self.max_retries = settings.GENERATION_MAX_RETRIES if max_retries is None else max_retries
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        self.base_delay = settings.GENERATION_RETRY_BASE_DELAY if base_delay is None else base_delay
        self._client = client or AsyncAnthropic(api_key=api_key or settings.ANTHROPIC_API_KEY)

    async def generate(
        self,
        prompt: str,
        mode: GenerationMode,
        max_tokens: int,
        on_chunk: ChunkCallback | None = None,
    ) -> GenerationResult:
        """
        Send ``prompt`` and return the full generated text.

        Args:
            prompt: Instruction text built for the stage
            mode: Single-shot or streaming
            max_tokens: Output token limit for the stage
            on_chunk: Called with each text delta, in arrival order (streaming only)

        Returns:
            GenerationResult with the concatenated text and token usage

        Raises:
            GenerationError: Non-transient provider error, retries exhausted,
                or a stream that ended without its completion marker
        """
        emitted = False

        async def emit(delta: str) -> None:
            nonlocal emitted
            emitted = True
            if on_chunk is not None:
                outcome = on_chunk(delta)
                if inspect.isawaitable(outcome):
                    await outcome

        for attempt in range(self.max_retries):
            t0 = time.monotonic()
            try:
                if mode == GenerationMode.STREAMING:
                    result = await self._stream_once(prompt, max_tokens, emit)
                else:
                    result = await self._complete_once(prompt, max_tokens)
            except _PrematureStreamEnd as e:
                raise GenerationError(
                    "Generation stream ended before completion", cause=e
                ) from e
            except APIStatusError as e:
                if not _is_transient(e) or emitted:
                    raise GenerationError(
                        f"Generation failed: {e.message}", status_code=e.status_code, cause=e
                    ) from e
                last_error: Exception = e
            except _TRANSIENT_ERRORS as e:
                if emitted:
                    raise GenerationError(
                        f"Generation stream interrupted: {e}", status_code=_status_of(e), cause=e
                    ) from e
                last_error = e
            else:
                result.duration_ms = int((time.monotonic() - t0) * 1000)
                logger.info(
                    f"Generated {len(result.text)} chars in {result.duration_ms}ms "
                    f"(in={result.input_tokens}, out={result.output_tokens}, mode={mode.value})"
                )
                return result

            if attempt < self.max_retries - 1:
                delay = self.base_delay * (2**attempt)
                logger.warning(f"Attempt {attempt + 1} failed: {last_error}. Retry in {delay}s")
                await asyncio.sleep(delay)

        logger.error(f"All {self.max_retries} attempts failed: {last_error}")
        raise GenerationError(
            f"Generation failed after {self.max_retries} attempts: {last_error}",
            status_code=_status_of(last_error),
            cause=last_error,
        )

    async def _complete_once(self, prompt: str, max_tokens: int) -> GenerationResult:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = getattr(response, "usage", None)
        return GenerationResult(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )

    async def _stream_once(
        self,
        prompt: str,
        max_tokens: int,
        emit: Callable[[str], Awaitable[None]],
    ) -> GenerationResult:
        stream = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            stream=True,
        )

        parts: list[str] = []
        input_tokens = 0
        output_tokens = 0
        finished = False

        # Closes the HTTP response on every exit, including cancellation
        async with stream:
            async for event in stream:
                if event.type == "message_start":
                    usage = getattr(event.message, "usage", None)
                    input_tokens = getattr(usage, "input_tokens", 0) or 0
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta" and event.delta.text:
                        parts.append(event.delta.text)
                        await emit(event.delta.text)
                elif event.type == "message_delta":
                    usage = getattr(event, "usage", None)
                    output_tokens = getattr(usage, "output_tokens", 0) or output_tokens
                elif event.type == "message_stop":
                    finished = True
                    break

        if not finished:
            raise _PrematureStreamEnd("stream closed without message_stop")

        return GenerationResult(
            text="".join(parts),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


_generation_client: GenerationClient | None = None


def get_generation_client() -> GenerationClient:
    """Get the process-wide generation client."""
    global _generation_client
    if _generation_client is None:
        _generation_client = GenerationClient()
    return _generation_client
