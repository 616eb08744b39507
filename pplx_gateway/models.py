from __future__ import annotations

from dataclasses import dataclass
from typing import Any

SEARCH_SUFFIX = "-search"
MODEL_OWNER = "perplexity"


class UnknownModelError(ValueError):
    """Raised when a request names a model the gateway does not serve."""


@dataclass(frozen=True, slots=True)
class ModelRoute:
    model: str
    model_preference: str
    mode: str = "copilot"
    search: bool = False


# public id -> (upstream model_preference, mode)
MODEL_PREFERENCES: dict[str, tuple[str, str]] = {
    "sonar": ("turbo", "concise"),
    "claude-3.7-sonnet": ("claude2", "copilot"),
    "claude-3.7-sonnet-think": ("claude37sonnetthinking", "copilot"),
    "gpt-4o": ("gpt4o", "copilot"),
    "gpt-4.5": ("gpt45", "copilot"),
    "gpt-4.1": ("gpt41", "copilot"),
    "o3-mini": ("o3mini", "copilot"),
    "o4-mini": ("o4mini", "copilot"),
    "gemini-2.0-flash": ("gemini2flash", "copilot"),
    "gemini-2.5-pro": ("gemini25pro", "copilot"),
    "grok-2": ("grok", "copilot"),
    "r1": ("r1", "copilot"),
}

DEFAULT_MODEL = "claude-3.7-sonnet"


def available_model_ids() -> list[str]:
    ids: list[str] = []
    for model_id in MODEL_PREFERENCES:
        ids.append(model_id)
        ids.append(f"{model_id}{SEARCH_SUFFIX}")
    return ids


def resolve_model(model: str | None) -> ModelRoute:
    requested = (model or DEFAULT_MODEL).strip()
    search = requested.endswith(SEARCH_SUFFIX)
    base_id = requested[: -len(SEARCH_SUFFIX)] if search else requested
    entry = MODEL_PREFERENCES.get(base_id)
    if entry is None:
        raise UnknownModelError(f"Model '{requested}' is not supported.")
    model_preference, mode = entry
    return ModelRoute(
        model=requested,
        model_preference=model_preference,
        mode=mode,
        search=search,
    )


def build_models_response(created: int = 0) -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": created,
                "owned_by": MODEL_OWNER,
            }
            for model_id in available_model_ids()
        ],
    }
