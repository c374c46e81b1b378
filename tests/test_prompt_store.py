from __future__ import annotations

import pytest

from app.services.prompt_store import clear_prompt_cache, render_prompt


@pytest.fixture(autouse=True)
def fresh_catalog():
    clear_prompt_cache()
    yield
    clear_prompt_cache()


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "business_personas",
        "user",
        count=3,
        relationship="buy",
        product_service="CRM software",
        industries="Technology, Retail",
        countries="United States",
    )
    assert "exactly 3 business personas" in prompt
    assert '"CRM software"' in prompt
    assert "Industries: Technology, Retail" in prompt


def test_system_prompts_need_no_values():
    for stage in ("business_personas", "dm_personas", "market_insights"):
        assert "JSON" in render_prompt(stage, "system")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing", "user")


def test_render_prompt_reports_missing_value():
    with pytest.raises(KeyError, match="count"):
        render_prompt("dm_personas", "user", relationship="buy")
