"""Ask several models the same question, then merge their answers.

Usage:
    uv run --env-file=.env examples/multidialog_example.py "Why is the sky blue?" \
        --models llama-3.3-70b llama3.1-8b --iterations 2 --synthesis-model llama-3.3-70b
"""

import argparse
import asyncio

from toolstream.config import Settings, setup_logging
from toolstream.fanout import (
    DEFAULT_SYNTHESIS_INSTRUCTIONS,
    ModelCallConfig,
    query_models,
    synthesize,
)


async def main():
    parser = argparse.ArgumentParser(description="Multi-model query and synthesis")
    parser.add_argument("prompt")
    parser.add_argument("--models", nargs="+", default=["llama-3.3-70b", "llama3.1-8b"])
    parser.add_argument("--iterations", type=int, default=1)
    parser.add_argument("--delay", type=float, default=0.0)
    parser.add_argument("--synthesis-model", default="llama-3.3-70b")
    args = parser.parse_args()

    setup_logging("INFO")
    settings = Settings.from_env()
    provider = settings.provider()
    config = {
        m: ModelCallConfig(iterations=args.iterations, delay_seconds=args.delay)
        for m in args.models
    }

    responses = []
    async for r in query_models(provider, args.prompt, args.models, config, settings):
        print(f"--- {r.model} #{r.iteration} ---\n{r.error or r.response}\n")
        responses.append(r)

    result = await synthesize(
        provider, args.prompt, DEFAULT_SYNTHESIS_INSTRUCTIONS, responses,
        args.synthesis_model, settings,
    )
    print("=== Synthesis ===")
    print(result.error or result.response)


if __name__ == "__main__":
    asyncio.run(main())
