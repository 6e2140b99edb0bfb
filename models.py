# Model constants
openai4omini = "openai/gpt-4o-mini"
openai4o = "openai/gpt-4o"
openai4turbo = "openai/gpt-4-turbo"
openai41mini = "openai/gpt-4.1-mini"
haiku3 = "anthropic/claude-3-haiku"
sonnet3 = "anthropic/claude-3-sonnet"
sonnet45 = "anthropic/claude-sonnet-4.5"
geminipro = "google/gemini-pro"
googleflash = "google/gemini-2.5-flash"
deepseekcoder = "deepseek/deepseek-coder"

HEALING_MODEL = openai4omini  # Model used for correction requests

# USD per 1k tokens, keyed by the model name without its provider prefix
MODEL_PRICING = {
    "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o": {"prompt": 0.005, "completion": 0.015},
    "gpt-4-turbo": {"prompt": 0.01, "completion": 0.03},
    "claude-3-haiku": {"prompt": 0.00025, "completion": 0.00125},
    "claude-3-sonnet": {"prompt": 0.003, "completion": 0.015},
    "gemini-pro": {"prompt": 0.000125, "completion": 0.000375},
    "deepseek-coder": {"prompt": 0.00014, "completion": 0.00028},
}


def base_model_name(model: str) -> str:
    """Strip the provider prefix from an OpenRouter style model id."""
    return model.split("/", 1)[-1]


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Return the estimated USD cost of a request, or 0.0 for unpriced models."""
    pricing = MODEL_PRICING.get(base_model_name(model))
    if not pricing:
        return 0.0
    return (
        prompt_tokens / 1000 * pricing["prompt"]
        + completion_tokens / 1000 * pricing["completion"]
    )
