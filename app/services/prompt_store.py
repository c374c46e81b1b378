from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from string import Template
from typing import Any

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "stages.json"


@lru_cache(maxsize=1)
def _load_catalog() -> dict[str, Any]:
    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Prompt catalog must be a JSON object.")
    return payload


def render_prompt(stage: str, part: str, **values: Any) -> str:
    """Render `<stage>.<part>` from the catalog; a missing placeholder value is a KeyError."""
    entry = _load_catalog().get(stage, {}).get(part)
    if not isinstance(entry, str):
        raise KeyError(f"Prompt not found: {stage}.{part}")
    try:
        return Template(entry).substitute(**values)
    except KeyError as exc:
        raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{stage}.{part}'") from exc


def clear_prompt_cache() -> None:
    _load_catalog.cache_clear()
