"""Tests for model_catalog module."""

from chatlens.model_catalog import (
    DEFAULT_MODEL,
    get_model_config,
    max_input_tokens_for,
    provider_for,
    resolve_model,
)


def test_known_models_resolve_to_themselves():
    assert resolve_model("deepseek-reasoner") == "deepseek-reasoner"
    assert resolve_model("moonshot-v1-128k") == "moonshot-v1-128k"


def test_legacy_aliases():
    assert resolve_model("deepseek") == "deepseek-chat"
    assert resolve_model("gemini") == "gemini-2.5-pro"
    assert resolve_model("kimi") == "moonshot-v1-8k"


def test_kimi_prefixed_names():
    assert resolve_model("kimi-k2-latest") == "moonshot-v1-32k"
    assert resolve_model("kimi-latest") == "moonshot-v1-8k"


def test_unknown_models_fall_back(caplog):
    with caplog.at_level("WARNING"):
        assert resolve_model("gpt-5") == DEFAULT_MODEL
        assert resolve_model(None) == DEFAULT_MODEL
    assert "Unknown model" in caplog.text
    assert resolve_model("gemini-9-ultra") == "gemini-2.5-pro"


def test_providers():
    assert provider_for("deepseek-chat") == "deepseek"
    assert provider_for("gemini-2.0-flash") == "gemini"
    assert provider_for("kimi-k2-0711-preview") == "kimi"
    assert get_model_config("moonshot-v1-8k").context_window == 8192


def test_input_budgets():
    assert max_input_tokens_for("deepseek-chat") == 48000
    assert max_input_tokens_for("deepseek-reasoner") == 48000
    assert max_input_tokens_for("gemini-2.5-pro") == 44000
    assert max_input_tokens_for("moonshot-v1-8k") == 6144
