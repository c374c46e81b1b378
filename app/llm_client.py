"""OpenRouter LLM access through the OpenAI-compatible SDK."""
from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger
from openai import AsyncOpenAI

from app.config import settings

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class MalformedResponseError(RuntimeError):
    """The model answered, but not with parseable JSON. Another attempt may succeed."""


def _temperature_for_model(model: str) -> float:
    # Some OpenAI GPT-5-compatible gateways reject anything but the default.
    if "gpt-5" in (model or "").lower():
        return 1
    return 0.3


def extract_json(text: str) -> Any:
    """Parse a JSON document from model output, tolerating code fences and prose around it."""
    candidate = (text or "").strip()
    fenced = _FENCE_RE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    # Whichever bracket opens first is the outermost document.
    pairs = sorted(
        (("{", "}"), ("[", "]")),
        key=lambda pair: candidate.find(pair[0]) if pair[0] in candidate else len(candidate),
    )
    for opener, closer in pairs:
        start, end = candidate.find(opener), candidate.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(candidate[start : end + 1])
            except json.JSONDecodeError:
                continue
    raise MalformedResponseError(f"Model response is not valid JSON: {candidate[:200]}")


def get_client() -> AsyncOpenAI:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    return AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=base_url)


def get_model() -> str:
    return settings.default_model


_client: AsyncOpenAI | None = None


def client() -> AsyncOpenAI:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client


async def complete_json(
    system: str,
    user: str,
    *,
    model: str | None = None,
    max_tokens: int = 2000,
) -> Any:
    """Ask for a JSON answer and return it parsed. Provider errors propagate untouched."""
    model_id = model or get_model()
    response = await client().chat.completions.create(
        model=model_id,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        max_tokens=max_tokens,
        temperature=_temperature_for_model(model_id),
        response_format={"type": "json_object"},
    )
    text = response.choices[0].message.content or ""
    usage = getattr(response, "usage", None)
    if usage:
        logger.debug(
            f"LLM usage model={model_id} prompt_tokens={getattr(usage, 'prompt_tokens', 0)} "
            f"completion_tokens={getattr(usage, 'completion_tokens', 0)}"
        )
    return extract_json(text)
