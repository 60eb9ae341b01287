"""Send one prompt to several models, then synthesize their answers.

Every model runs concurrently; each model's iterations run one after
another with an optional delay between them. Synthesis only starts once
every iteration of every model has finished, successfully or not.
"""

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass

from pydantic import BaseModel, Field

from toolstream.config import Settings
from toolstream.provider import CompletionRequest, ModelProvider

logger = logging.getLogger(__name__)

USER_QUERY_PLACEHOLDER = "{USER_QUERY}"
MODEL_RESPONSES_PLACEHOLDER = "{MODEL_RESPONSES}"

DEFAULT_SYNTHESIS_INSTRUCTIONS = (
    "You are an expert synthesizer AI. Analyze the following user query and the "
    "responses provided by different AI models. Your task is to combine the best "
    "aspects of each response into a single, comprehensive, and accurate final "
    "answer based *only* on the information provided in the responses. Ensure "
    "accuracy, coherence, and do not add any external information. Respond "
    "directly to the user query based on the synthesis.\n\n"
    "User Query:\n{USER_QUERY}\n\n"
    "Model Responses:\n{MODEL_RESPONSES}"
)

_FANOUT_SYSTEM_PROMPT = "You are a helpful assistant."


class ModelCallConfig(BaseModel):
    """How often to query one model, and how long to wait in between."""

    iterations: int = Field(default=1, ge=1)
    delay_seconds: float = Field(default=0.0, ge=0.0)


@dataclass
class FanOutResponse:
    model: str
    iteration: int
    response: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.response)


@dataclass
class SynthesisResult:
    response: str | None = None
    error: str | None = None


async def _query_once(
    provider: ModelProvider,
    prompt: str,
    model: str,
    iteration: int,
    settings: Settings,
) -> FanOutResponse:
    request = CompletionRequest(
        model=model,
        messages=[
            {"role": "system", "content": _FANOUT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=settings.temperature,
        top_p=settings.top_p,
    )
    try:
        content = await provider.complete(request)
    except Exception as e:
        logger.error(f"Error querying model {model} (Iteration {iteration}): {e}")
        return FanOutResponse(
            model=model, iteration=iteration,
            error=f"Failed to get response: {e}",
        )
    logger.info(f"Response from {model} (Iteration {iteration}) received.")
    return FanOutResponse(
        model=model, iteration=iteration,
        response=content or "No content received",
    )


async def query_models(
    provider: ModelProvider,
    prompt: str,
    target_models: list[str],
    model_config: dict[str, ModelCallConfig] | None = None,
    settings: Settings | None = None,
) -> AsyncIterator[FanOutResponse]:
    """Yield each model's responses as soon as they arrive.

    Args:
        provider: Transport used for every (non-streaming) completion.
        prompt: The user prompt sent to every model.
        target_models: Models to query, all concurrently.
        model_config: Per-model iterations and delay; missing models get
            one iteration without delay.
        settings: Sampling settings.
    """
    settings = settings or Settings()
    model_config = model_config or {}
    queue: asyncio.Queue[FanOutResponse | None] = asyncio.Queue()

    async def worker(model: str) -> None:
        config = model_config.get(model) or ModelCallConfig()
        try:
            for i in range(config.iterations):
                if i > 0 and config.delay_seconds > 0:
                    logger.debug(
                        f"Delaying {config.delay_seconds}s before iteration {i + 1} for {model}"
                    )
                    await asyncio.sleep(config.delay_seconds)
                logger.info(f"Querying {model} (Iteration {i + 1}/{config.iterations})...")
                queue.put_nowait(
                    await _query_once(provider, prompt, model, i + 1, settings)
                )
        finally:
            queue.put_nowait(None)

    tasks = [asyncio.create_task(worker(m)) for m in target_models]
    try:
        remaining = len(tasks)
        while remaining:
            item = await queue.get()
            if item is None:
                remaining -= 1
                continue
            yield item
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def _check_template(template: str) -> None:
    missing = [
        p for p in (USER_QUERY_PLACEHOLDER, MODEL_RESPONSES_PLACEHOLDER)
        if p not in template
    ]
    if missing:
        raise ValueError(
            f"Synthesis instructions must contain {' and '.join(missing)}"
        )


def _fill_template(template: str, values: dict[str, str]) -> str:
    # Single pass, so placeholder text inside a value is left alone.
    pattern = "|".join(re.escape(p) for p in values)
    return re.sub(pattern, lambda m: values[m.group(0)], template)


def format_responses(responses: list[FanOutResponse]) -> str:
    return "\n\n".join(
        f"--- Response from {r.model} ---\n{r.response}" for r in responses
    ).strip()


async def synthesize(
    provider: ModelProvider,
    original_prompt: str,
    instructions_template: str,
    responses: list[FanOutResponse],
    synthesis_model: str,
    settings: Settings | None = None,
) -> SynthesisResult:
    """Ask *synthesis_model* to merge the successful responses into one answer.

    Raises:
        ValueError: If the template lacks ``{USER_QUERY}`` or
            ``{MODEL_RESPONSES}``.
    """
    _check_template(instructions_template)
    settings = settings or Settings()

    if not synthesis_model:
        return SynthesisResult(error="Synthesis model name not provided.")

    successful = [r for r in responses if r.ok]
    if not successful:
        return SynthesisResult(error="No successful individual responses to synthesize.")

    prompt = _fill_template(instructions_template, {
        USER_QUERY_PLACEHOLDER: original_prompt,
        MODEL_RESPONSES_PLACEHOLDER: format_responses(successful),
    })
    request = CompletionRequest(
        model=synthesis_model,
        messages=[{"role": "user", "content": prompt}],
        temperature=settings.temperature,
        top_p=settings.top_p,
    )

    logger.info(f"Synthesizing with {synthesis_model} using instructions...")
    try:
        content = await provider.complete(request)
    except Exception as e:
        logger.error(f"Error during synthesis with {synthesis_model}: {e}")
        return SynthesisResult(error=f"Synthesis failed: {e}")
    logger.info("Synthesis complete.")
    return SynthesisResult(response=content or "Synthesis model returned no content.")


async def query_and_synthesize(
    provider: ModelProvider,
    prompt: str,
    target_models: list[str],
    synthesis_model: str,
    instructions_template: str = DEFAULT_SYNTHESIS_INSTRUCTIONS,
    model_config: dict[str, ModelCallConfig] | None = None,
    settings: Settings | None = None,
) -> tuple[list[FanOutResponse], SynthesisResult]:
    """Query every model, wait for all of them, then synthesize."""
    _check_template(instructions_template)
    responses = [
        r async for r in query_models(
            provider, prompt, target_models, model_config, settings,
        )
    ]
    result = await synthesize(
        provider, prompt, instructions_template, responses,
        synthesis_model, settings,
    )
    return responses, result
