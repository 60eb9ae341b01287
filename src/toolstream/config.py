import logging
import os
import sys

from pydantic import BaseModel, Field

from toolstream.provider import CerebrasProvider, OpenAICompatibleProvider

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant capable of using tools. "
    "Use tools only when necessary and relevant to the user's request. "
    "Format responses using Markdown."
)

LOG_FORMAT = "%(asctime)s:%(name)s:%(levelname)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ModelInfo(BaseModel):
    context: int
    vision_supported: bool = False


MODEL_CONTEXT_SIZES: dict[str, ModelInfo] = {
    "default": ModelInfo(context=8192, vision_supported=False),
    "llama-4-scout-17b-16e-instruct": ModelInfo(context=131072, vision_supported=True),
    "llama-3.3-70b": ModelInfo(context=128000, vision_supported=False),
    "deepseek-r1-distill-llama-70b": ModelInfo(context=128000, vision_supported=False),
    "llama3.1-8b": ModelInfo(context=8192, vision_supported=False),
}


def model_info(model: str) -> ModelInfo:
    """Context size and capabilities for *model*, or the defaults."""
    return MODEL_CONTEXT_SIZES.get(model, MODEL_CONTEXT_SIZES["default"])


class Settings(BaseModel):
    """Request and loop settings for a conversation."""

    model: str = "llama-3.3-70b"
    temperature: float = 0.7
    top_p: float = 0.95
    custom_system_prompt: str = ""
    max_tool_use_attempts: int = Field(default=4, ge=1)
    max_turns: int = Field(default=25, ge=1)
    api_key: str | None = None
    base_url: str | None = None

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Build settings from ``TOOLSTREAM_*`` environment variables.

        Keyword arguments win over the environment.
        """
        env = {
            "model": os.getenv("TOOLSTREAM_MODEL"),
            "temperature": os.getenv("TOOLSTREAM_TEMPERATURE"),
            "top_p": os.getenv("TOOLSTREAM_TOP_P"),
            "max_tool_use_attempts": os.getenv("TOOLSTREAM_MAX_TOOL_USE_ATTEMPTS"),
            "max_turns": os.getenv("TOOLSTREAM_MAX_TURNS"),
            "api_key": os.getenv("CEREBRAS_API_KEY"),
            "base_url": os.getenv("TOOLSTREAM_BASE_URL"),
        }
        values = {k: v for k, v in env.items() if v}
        values.update(overrides)
        return cls(**values)

    def system_prompt(self) -> str:
        if self.custom_system_prompt.strip():
            return f"{DEFAULT_SYSTEM_PROMPT}\n\n{self.custom_system_prompt.strip()}"
        return DEFAULT_SYSTEM_PROMPT

    def provider(self) -> OpenAICompatibleProvider:
        """Completion provider for ``api_key`` and ``base_url``.

        Without a ``base_url`` this is the Cerebras endpoint.
        """
        if self.base_url:
            return OpenAICompatibleProvider(base_url=self.base_url, api_key=self.api_key)
        return CerebrasProvider(api_key=self.api_key)

    @property
    def model_info(self) -> ModelInfo:
        return model_info(self.model)


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Configure root logging for a host application.

    Args:
        level: Root log level name.
        log_file: Optional file that mirrors console output.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
