import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
from openai import APIError, AsyncOpenAI

from toolstream.errors import ErrorKind, StreamFailure
from toolstream.streaming import StreamChunk, ToolCallFragment

logger = logging.getLogger(__name__)

TOOL_USE_FAILED_CODE = "tool_use_failed"


@dataclass
class CompletionRequest:
    """Everything needed to (re-)issue one completion request."""

    model: str
    messages: list[dict]
    temperature: float | None = None
    top_p: float | None = None
    tools: list[dict] | None = None

    def to_kwargs(self, stream: bool) -> dict:
        kwargs = {"model": self.model, "messages": self.messages}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.top_p is not None:
            kwargs["top_p"] = self.top_p
        if self.tools:
            kwargs["tools"] = self.tools
            kwargs["tool_choice"] = "auto"
        if stream:
            kwargs["stream"] = True
        return kwargs


def _error_code(error: APIError) -> str | None:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        nested = body.get("error")
        if isinstance(nested, dict):
            body = nested
        code = body.get("code")
        if code:
            return str(code)
    return None


def classify_error(error: APIError | httpx.HTTPError) -> StreamFailure:
    """Map an openai client or raw httpx error onto the turn error taxonomy.

    httpx errors raised while reading a stream are not wrapped by the
    openai client; they carry no code and are always transport errors.
    """
    if isinstance(error, httpx.HTTPError):
        return StreamFailure(
            ErrorKind.TRANSPORT_ERROR, detail=str(error) or type(error).__name__,
        )
    code = _error_code(error)
    if code == TOOL_USE_FAILED_CODE:
        kind = ErrorKind.TOOL_USE_PROTOCOL_FAILURE
    else:
        kind = ErrorKind.TRANSPORT_ERROR
    return StreamFailure(kind, detail=str(error), code=code)


def normalize_chunk(chunk) -> StreamChunk | None:
    """Convert an OpenAI ``ChatCompletionChunk`` into a :class:`StreamChunk`.

    Chunks without choices (e.g. trailing usage reports) return ``None``.
    """
    if not chunk.choices:
        return None
    choice = chunk.choices[0]
    delta = choice.delta
    fragments = []
    for tc in (getattr(delta, "tool_calls", None) or []):
        function = getattr(tc, "function", None)
        fragments.append(ToolCallFragment(
            index=tc.index,
            call_id=tc.id,
            name=getattr(function, "name", None),
            arguments_delta=getattr(function, "arguments", None),
        ))
    return StreamChunk(
        response_id=getattr(chunk, "id", None),
        role=getattr(delta, "role", None),
        content_delta=getattr(delta, "content", None),
        tool_call_fragments=fragments or None,
        finish_reason=choice.finish_reason,
        usage=getattr(chunk, "usage", None),
    )


class ModelProvider:
    """Completion transport.

    ``stream_complete`` yields :class:`StreamChunk` objects and raises
    :class:`StreamFailure` when the request is rejected or the stream
    breaks. ``complete`` is the non-streaming variant used by fan-out
    queries.
    """

    system = "unknown"

    async def stream_complete(
            self,
            request: CompletionRequest,
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError
        yield  # pragma: no cover

    async def complete(self, request: CompletionRequest) -> str | None:
        raise NotImplementedError


class OpenAICompatibleProvider(ModelProvider):
    """Any endpoint speaking the OpenAI chat-completions protocol.

    Args:
        base_url: Endpoint root, e.g. ``http://localhost:11434/v1``.
        api_key: API key; falls back to ``api_key_env`` when set on the
            subclass, then to a dummy key for local servers.
        timeout: Request timeout in seconds.
        max_retries: Connection-level retries performed by the openai client.
    """

    system = "openai_compatible"
    default_base_url: str | None = None
    api_key_env: str | None = None
    requires_api_key = False

    def __init__(
            self,
            base_url: str | None = None,
            api_key: str | None = None,
            timeout: float = 180.0,
            max_retries: int = 2,
    ):
        if not api_key and self.api_key_env:
            api_key = os.getenv(self.api_key_env)
        self.api_key = api_key
        base_url = base_url or self.default_base_url
        self.base_url = base_url.rstrip("/") if base_url else None
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
            max_retries=max_retries,
            timeout=timeout,
        )

    def _check_credentials(self) -> None:
        if self.requires_api_key and not self.api_key:
            hint = f" Set {self.api_key_env}." if self.api_key_env else ""
            raise StreamFailure(
                ErrorKind.TRANSPORT_ERROR,
                detail=f"API key not configured.{hint}",
            )

    async def stream_complete(
            self,
            request: CompletionRequest,
    ) -> AsyncIterator[StreamChunk]:
        self._check_credentials()
        try:
            stream = await self.client.chat.completions.create(
                **request.to_kwargs(stream=True)
            )
        except (APIError, httpx.HTTPError) as e:
            logger.warning(f"Completion request rejected: {e}")
            raise classify_error(e) from e

        try:
            async for raw in stream:
                chunk = normalize_chunk(raw)
                if chunk is not None:
                    yield chunk
        except (APIError, httpx.HTTPError) as e:
            logger.warning(f"Completion stream failed: {e}")
            raise classify_error(e) from e
        finally:
            await stream.close()

    async def complete(self, request: CompletionRequest) -> str | None:
        self._check_credentials()
        try:
            response = await self.client.chat.completions.create(
                **request.to_kwargs(stream=False)
            )
        except (APIError, httpx.HTTPError) as e:
            raise classify_error(e) from e
        if not response.choices:
            return None
        return response.choices[0].message.content


class OpenAIProvider(OpenAICompatibleProvider):
    system = "openai"
    api_key_env = "OPENAI_API_KEY"
    requires_api_key = True

    def __init__(self, api_key: str | None = None, **kwargs):
        super().__init__(api_key=api_key, **kwargs)


class CerebrasProvider(OpenAICompatibleProvider):
    system = "cerebras"
    default_base_url = "https://api.cerebras.ai/v1"
    api_key_env = "CEREBRAS_API_KEY"
    requires_api_key = True

    def __init__(self, api_key: str | None = None, **kwargs):
        super().__init__(api_key=api_key, **kwargs)


class OpenRouter(OpenAICompatibleProvider):
    system = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"
    api_key_env = "OPENROUTER_API_KEY"
    requires_api_key = True

    def __init__(self, api_key: str | None = None, **kwargs):
        super().__init__(api_key=api_key, **kwargs)


class VLLMProvider(OpenAICompatibleProvider):
    system = "vllm"

    def __init__(self, url: str, port: int, **kwargs):
        super().__init__(base_url=f"http://{url}:{port}/v1", **kwargs)
