"""Known LLM models, their providers and token limits."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "deepseek-chat"

# Largest prompt we ever send, regardless of the model's context window
MAX_PROMPT_WINDOW = 64000


@dataclass(frozen=True)
class ModelConfig:
    id: str
    provider: str
    name: str
    context_window: int
    max_output_tokens: int


MODEL_CONFIG: dict[str, ModelConfig] = {
    cfg.id: cfg
    for cfg in [
        ModelConfig("deepseek-chat", "deepseek", "DeepSeek Chat", 64000, 4096),
        ModelConfig("deepseek-reasoner", "deepseek", "DeepSeek Reasoner", 64000, 4096),
        ModelConfig("gemini-2.5-pro", "gemini", "Gemini 2.5 Pro", 1_000_000, 8192),
        ModelConfig("gemini-2.0-flash", "gemini", "Gemini 2.0 Flash", 1_000_000, 8192),
        ModelConfig("kimi-k2-0711-preview", "kimi", "Kimi K2", 128000, 4096),
        ModelConfig("moonshot-v1-8k", "kimi", "Moonshot v1 8K", 8192, 4096),
        ModelConfig("moonshot-v1-32k", "kimi", "Moonshot v1 32K", 32768, 4096),
        ModelConfig("moonshot-v1-128k", "kimi", "Moonshot v1 128K", 128000, 4096),
    ]
}

# Model names stored by older task records
LEGACY_ALIASES = {
    "deepseek": "deepseek-chat",
    "gemini": "gemini-2.5-pro",
    "gemini-pro": "gemini-2.5-pro",
    "kimi": "moonshot-v1-8k",
}


def resolve_model(model_id: str | None) -> str:
    """Map a stored model name onto a catalog id.

    Unknown names fall back to the default model with a warning.
    """
    name = (model_id or "").strip()
    if name in MODEL_CONFIG:
        return name
    if name in LEGACY_ALIASES:
        return LEGACY_ALIASES[name]
    if name.startswith("kimi-"):
        return "moonshot-v1-32k" if "k2" in name else "moonshot-v1-8k"
    for prefix in ("deepseek", "gemini", "moonshot"):
        if name.startswith(prefix):
            family = [m for m in MODEL_CONFIG if m.startswith(prefix)]
            logger.warning("Unknown %s model %r, using %s", prefix, name, family[0])
            return family[0]

    logger.warning("Unknown model %r, using %s", model_id, DEFAULT_MODEL)
    return DEFAULT_MODEL


def get_model_config(model_id: str | None) -> ModelConfig:
    return MODEL_CONFIG[resolve_model(model_id)]


def provider_for(model_id: str | None) -> str:
    return get_model_config(model_id).provider


def max_input_tokens_for(model_id: str | None) -> int:
    """Input budget: the prompt window minus the room kept for the answer."""
    cfg = get_model_config(model_id)
    if cfg.id == "deepseek-reasoner":
        reserve = 16000
    else:
        reserve = min(20000, cfg.context_window // 4)
    return min(cfg.context_window, MAX_PROMPT_WINDOW) - reserve
