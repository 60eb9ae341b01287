"""Interactive chat with tool approval.

Demonstrates:
- Exposing tools with @tool and a ToolRegistry
- Streaming a conversation's events to the terminal
- Pausing on tool calls that need approval and resuming with a decision
- Persisting "always" decisions with JsonFilePolicyStore

Usage:
    uv run --env-file=.env examples/approval_chat_example.py --provider cerebras
    uv run examples/approval_chat_example.py --provider vllm --url localhost:8000 --model Qwen/Qwen3-8B --trace
"""

import argparse
import asyncio
from pathlib import Path

from toolstream.approval import ApprovalDecision, JsonFilePolicyStore
from toolstream.config import Settings, setup_logging
from toolstream.conversation import Conversation, ConversationState
from toolstream.events import (
    ApprovalRequiredEvent,
    ContentDeltaEvent,
    RunCompleteEvent,
    ToolResultEvent,
    TurnRetryEvent,
)
from toolstream.provider import (
    ModelProvider,
    OpenAIProvider,
    OpenRouter,
    VLLMProvider,
)
from toolstream.tools import ToolRegistry, tool

PROVIDERS = {
    "cerebras": lambda settings, url: settings.provider(),
    "openai": lambda settings, url: OpenAIProvider(),
    "openrouter": lambda settings, url: OpenRouter(),
    "vllm": lambda settings, url: VLLMProvider(*url.split(":")),
}

DECISIONS = {"y": ApprovalDecision.ONCE, "a": ApprovalDecision.ALWAYS, "n": ApprovalDecision.DENY}

NOTES: dict[str, str] = {}


def make_provider(provider: str, settings: Settings, url: str | None) -> ModelProvider:
    if provider == "vllm" and not url:
        raise SystemExit("--url is required for vllm provider")
    return PROVIDERS[provider](settings, url)


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from toolstream.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


@tool
def add_note(title: str, content: str):
    """Save a note with the given title and content."""
    NOTES[title] = content
    return f"Saved note '{title}'."


@tool
def list_notes():
    """List all saved note titles."""
    return ", ".join(NOTES) or "No notes yet."


@tool
def delete_note(title: str):
    """Delete a note by title."""
    if NOTES.pop(title, None) is None:
        return f"No note found with title '{title}'."
    return f"Deleted note '{title}'."


async def stream(events) -> ConversationState:
    state = ConversationState.DONE
    async for event in events:
        if isinstance(event, ContentDeltaEvent):
            print(event.content, end="", flush=True)
        elif isinstance(event, TurnRetryEvent):
            print(f"\n[retrying, attempt {event.attempt + 1}/{event.max_attempts}]")
        elif isinstance(event, ToolResultEvent):
            print(f"\n[{event.name}] {event.content}")
        elif isinstance(event, ApprovalRequiredEvent):
            print(f"\nTool '{event.name}' wants to run with {event.arguments}")
        elif isinstance(event, RunCompleteEvent):
            state = event.result.state
            if event.result.error is not None:
                print(f"\nError: {event.result.last_message.content}")
    print()
    return state


async def main():
    parser = argparse.ArgumentParser(description="Chat with tool approval")
    parser.add_argument("--provider", choices=PROVIDERS, default="cerebras")
    parser.add_argument("--model", default=None)
    parser.add_argument("--url", default=None)
    parser.add_argument("--policies", default=str(Path.home() / ".toolstream" / "policies.json"))
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    setup_logging("WARNING")
    if args.trace:
        setup_tracing("approval-chat")

    settings = Settings.from_env(**({"model": args.model} if args.model else {}))
    conversation = Conversation(
        make_provider(args.provider, settings, args.url),
        ToolRegistry([add_note, list_notes, delete_note]),
        policy_store=JsonFilePolicyStore(args.policies),
        settings=settings,
    )

    print(f"Chatting with {settings.model}\n")

    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        print("Assistant: ", end="")
        state = await stream(conversation.iter(user_input))
        while state is ConversationState.SUSPENDED:
            choice = ""
            while choice not in DECISIONS:
                choice = input("Allow? [y]es once / [a]lways / [n]o: ").strip().lower()
            call = conversation.pending_call
            state = await stream(conversation.iter_resolve(DECISIONS[choice], call.id))


if __name__ == "__main__":
    asyncio.run(main())
