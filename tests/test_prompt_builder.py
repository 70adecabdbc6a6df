"""Tests for prompt_builder module."""

from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

from chatlens.models import Message, Task
from chatlens.prompt_builder import (
    BASE_SYSTEM_PROMPT,
    FALLBACK_SYSTEM_PROMPT,
    build,
    build_room_block,
    estimate_tokens,
    fit_to_budget,
    format_message_line,
    resolve_system_prompt,
    simplify_system_prompt,
)

SHANGHAI = ZoneInfo("Asia/Shanghai")


def _block(room: str, contents: list[str]):
    return build_room_block(room, [Message("user", c) for c in contents], SHANGHAI)


# --- estimate_tokens ---


def test_estimate_tokens_weights():
    assert estimate_tokens("") == 0
    assert estimate_tokens("你好") == 3
    assert estimate_tokens("你") == 2
    assert estimate_tokens("hello world") == 2
    assert estimate_tokens("a, b!") == 3


# --- Formatting ---


def test_format_message_line():
    line = format_message_line(Message("Alice", "  hi  ", 1751335200), SHANGHAI)
    assert line == "[2025-07-01 10:00:00] Alice: hi"


def test_format_message_line_without_timestamp():
    assert format_message_line(Message("Bob", "yo"), SHANGHAI) == "[] Bob: yo"


def test_room_block_skips_blank_messages():
    block = build_room_block("dev", [Message("a", "hi"), Message("b", "   ")], SHANGHAI)
    assert block.message_count == 1
    assert block.text.startswith("=== 群聊：dev ===\n")


def test_build_includes_blocks_and_counts():
    bundle = build("Analyze this.", [_block("dev", ["one", "two"])])
    assert "Analyze this." in bundle.text
    assert "=== 群聊：dev ===" in bundle.text
    assert "共2条消息" in bundle.text
    assert bundle.estimated_tokens == estimate_tokens(bundle.text)
    assert bundle.compressed is False


def test_build_uses_base_prompt_when_empty():
    bundle = build("   ", [_block("dev", ["one"])])
    assert bundle.system_prompt == BASE_SYSTEM_PROMPT


# --- fit_to_budget ---


def test_fitting_bundle_is_returned_unchanged():
    bundle = build("sys", [_block("dev", ["hello"])])
    assert fit_to_budget(bundle, bundle.estimated_tokens + 10, safety_margin=0) is bundle


def test_densest_block_is_kept_whole():
    dense = _block("dense", ["ok"] * 100)
    sparse = _block("sparse", [" ".join(["word"] * 200)] * 10)
    bundle = build("sys", [dense, sparse])
    max_tokens = build("sys", [dense]).estimated_tokens + 300

    fitted = fit_to_budget(bundle, max_tokens, safety_margin=0)

    assert [b.room for b in fitted.blocks] == ["dense"]
    assert fitted.blocks[0] == dense
    assert fitted.compressed is True
    assert fitted.estimated_tokens <= max_tokens
    assert "已优化以适应token限制" in fitted.text


def test_kept_blocks_stay_in_original_order():
    first = _block("first", ["ok"] * 50)
    huge = _block("huge", [" ".join(["word"] * 300)] * 10)
    last = _block("last", ["ok"] * 60)
    bundle = build("sys", [first, huge, last])
    max_tokens = build("sys", [first, last]).estimated_tokens + 200

    fitted = fit_to_budget(bundle, max_tokens, safety_margin=0)
    assert [b.room for b in fitted.blocks] == ["first", "last"]


def test_oversized_single_block_is_truncated_from_the_end():
    block = _block("big", [f"message number {i}" for i in range(500)])
    bundle = build("sys", [block])

    fitted = fit_to_budget(bundle, 1500, safety_margin=0)

    kept = fitted.blocks[0]
    assert 10 <= kept.message_count < 500
    assert kept.lines == block.lines[: kept.message_count]
    assert fitted.estimated_tokens <= 1500


def test_truncation_keeps_at_least_ten_messages():
    block = _block("big", [f"message number {i}" for i in range(500)])
    fitted = fit_to_budget(build("sys", [block]), 200, safety_margin=0)
    assert fitted.message_count == 10
    assert fitted.compressed is True


def test_oversized_system_prompt_is_simplified_when_compressing():
    system_prompt = "请详细分析。请注意格式。" * 80
    bundle = build(system_prompt, [_block("dev", ["ok"] * 20)])
    assert estimate_tokens(system_prompt) > 1000 * 0.3
    assert bundle.estimated_tokens > 1000

    fitted = fit_to_budget(bundle, 1000, safety_margin=0)

    assert fitted.system_prompt == simplify_system_prompt(system_prompt)
    assert "详细" not in fitted.system_prompt
    assert "请注意" not in fitted.system_prompt
    assert "详细" not in fitted.text
    assert fitted.compressed is True
    assert [b.room for b in fitted.blocks] == ["dev"]


def test_small_system_prompt_survives_compression():
    block = _block("big", [f"message number {i}" for i in range(500)])
    fitted = fit_to_budget(build("请详细分析。", [block]), 1500, safety_margin=0)
    assert fitted.system_prompt == "请详细分析。"


def test_simplify_system_prompt_drops_fillers():
    simplified = simplify_system_prompt("请详细分析。\n\n\n\n请注意格式 very detailed output")
    assert "详细" not in simplified
    assert "请注意" not in simplified
    assert "very" not in simplified
    assert "\n\n\n" not in simplified
    assert simplified.endswith("output")


# --- resolve_system_prompt ---


def _task(**kwargs) -> Task:
    return Task(id=1, name="weekly", rooms=["dev"], **kwargs)


def test_inline_prompt_wins():
    templates = MagicMock()
    assert resolve_system_prompt(_task(prompt="  custom  "), templates) == "custom"
    templates.get_prompt_template.assert_not_called()


def test_missing_template_falls_back_to_default():
    templates = MagicMock()
    templates.get_prompt_template.return_value = None
    templates.get_default_prompt_template.return_value = {"system_prompt": "default prompt"}

    assert resolve_system_prompt(_task(prompt_template_id=5), templates) == "default prompt"
    templates.get_prompt_template.assert_called_once_with(5)


def test_referenced_template_is_used():
    templates = MagicMock()
    templates.get_prompt_template.return_value = {"system_prompt": "template prompt"}
    assert resolve_system_prompt(_task(prompt_template_id=2), templates) == "template prompt"
    templates.get_default_prompt_template.assert_not_called()


def test_no_templates_uses_fallback():
    templates = MagicMock()
    templates.get_default_prompt_template.return_value = None
    assert resolve_system_prompt(_task(), templates) == FALLBACK_SYSTEM_PROMPT
