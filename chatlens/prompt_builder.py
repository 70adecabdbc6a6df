"""Prompt assembly and token-budget fitting.

A prompt is a system prompt, a fixed instruction frame, a data-summary
line and one block per room. When the estimate exceeds the model's input
budget the bundle is rebuilt from the densest whole room blocks; a room
is only cut internally when no single block fits on its own.
"""

import logging
import math
import re
from collections.abc import Iterable, Mapping
from datetime import datetime, tzinfo

from config import settings
from chatlens.models import Message, PromptBundle, RoomBlock, Task
from chatlens.stores import PromptTemplateStore
from chatlens.time_window import normalize_timestamp

logger = logging.getLogger(__name__)

# System prompts above this share of the input budget get simplified
SYSTEM_PROMPT_SHARE = 0.3

# Truncated blocks keep at least this many messages
MIN_TRUNCATED_MESSAGES = 10
TRUNCATION_FACTOR = 0.8

CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")
LATIN_WORD_PATTERN = re.compile(r"[a-zA-Z]+")
OTHER_CHAR_PATTERN = re.compile(r"[^\u4e00-\u9fffa-zA-Z\s]")

FILLER_PATTERNS = [
    re.compile(r"详细|具体|深入|全面"),
    re.compile(r"请注意|需要注意|特别说明"),
    re.compile(r"\b(?:very|really|extremely|detailed|comprehensive|in-depth|thoroughly)\b\s*", re.IGNORECASE),
    re.compile(r"\b(?:please note(?: that)?|note that|keep in mind(?: that)?)[,:]?\s*", re.IGNORECASE),
]
BLANK_RUN_PATTERN = re.compile(r"\n{3,}")

FALLBACK_SYSTEM_PROMPT = "请分析以下群聊记录，总结主要话题、活跃成员和关键信息，并生成HTML格式的分析报告。"

BASE_SYSTEM_PROMPT = """你是一位严谨的群聊数据分析专家，同时擅长网页视觉设计。

任务：分析给定的群聊记录，生成一份结构清晰、信息丰富的单页HTML分析报告，使用中文呈现。

报告需要包含：
1. 数据总览：分析时段、消息总数、参与人数、活跃时段。
2. 核心话题：不超过5个关键词，以标签形式展示。
3. 活跃度排行：排名、用户名、发言次数、占比与条形图。
4. 热门话题与精彩发言：每个话题一张卡片，标注发言者和时间。
5. 关键发现与建议：基于数据的洞察。

输入格式：[时间] 发言人: 内容。"""

PROMPT_FRAME = """{system_prompt}

---

## 数据说明：
{summary}

## 群聊数据（共{message_count}条消息）：
格式说明：每条消息包含时间、发送者、内容
数据内容：
{data}

---

## 输出要求：
请基于以上数据和要求，生成一份完整的HTML群聊分析报告。
1. 以 <!DOCTYPE html> 开头，以 </html> 结尾
2. 包含完整的HTML结构和内联CSS样式
3. 不要输出Markdown或任何说明文字"""


def estimate_tokens(text: str) -> int:
    """Rough token count for budgeting.

    1.5 per CJK character, 1 per Latin word, 0.5 per other
    non-whitespace character.
    """
    if not text:
        return 0
    cjk = len(CJK_PATTERN.findall(text))
    words = len(LATIN_WORD_PATTERN.findall(text))
    other = len(OTHER_CHAR_PATTERN.findall(text))
    return math.ceil(1.5 * cjk + words + 0.5 * other)


def format_message_line(message: Message, tz: tzinfo | None = None) -> str:
    """Render ``[YYYY-MM-DD HH:MM:SS] sender: content``."""
    ts = normalize_timestamp(message.timestamp, tz)
    time_str = ""
    if ts is not None:
        time_str = datetime.fromtimestamp(ts / 1000, tz or settings.tz).strftime("%Y-%m-%d %H:%M:%S")
    return f"[{time_str}] {message.sender}: {message.content.strip()}"


def build_room_block(room: str, messages: Iterable[Message], tz: tzinfo | None = None) -> RoomBlock:
    lines = tuple(
        format_message_line(m, tz) for m in messages if m.content and m.content.strip()
    )
    return RoomBlock(room=room, lines=lines)


def _default_summary(blocks: tuple[RoomBlock, ...]) -> str:
    rooms = "、".join(b.room for b in blocks)
    count = sum(b.message_count for b in blocks)
    return f"分析 {len(blocks)} 个群聊（{rooms}）的 {count} 条消息"


def build(
    system_prompt: str,
    blocks: Iterable[RoomBlock],
    summary: str | None = None,
    compressed: bool = False,
) -> PromptBundle:
    """Assemble a prompt bundle from a system prompt and room blocks."""
    blocks = tuple(blocks)
    system_prompt = system_prompt.strip() or BASE_SYSTEM_PROMPT
    message_count = sum(b.message_count for b in blocks)
    text = PROMPT_FRAME.format(
        system_prompt=system_prompt,
        summary=summary or _default_summary(blocks),
        message_count=message_count,
        data="\n\n".join(b.text for b in blocks),
    )
    return PromptBundle(
        system_prompt=system_prompt,
        blocks=blocks,
        text=text,
        estimated_tokens=estimate_tokens(text),
        compressed=compressed,
    )


def simplify_system_prompt(prompt: str) -> str:
    """Strip filler adjectives and reminders, collapse blank-line runs."""
    simplified = prompt
    for pattern in FILLER_PATTERNS:
        simplified = pattern.sub("", simplified)
    simplified = BLANK_RUN_PATTERN.sub("\n\n", simplified).strip()
    logger.info("Simplified system prompt: %d -> %d characters", len(prompt), len(simplified))
    return simplified


def _density(block: RoomBlock, tokens: int) -> float:
    return block.message_count / tokens if tokens else float("inf")


def _compressed_summary(blocks: tuple[RoomBlock, ...]) -> str:
    count = sum(b.message_count for b in blocks)
    return f"分析 {count} 条消息（已优化以适应token限制）"


def fit_to_budget(
    bundle: PromptBundle,
    max_input_tokens: int,
    safety_margin: int | None = None,
) -> PromptBundle:
    """Return a bundle whose estimate fits ``max_input_tokens``.

    Never raises: when nothing fits whole, the densest room is truncated
    from the end, keeping at least ten messages.
    """
    margin = settings.prompt_safety_margin if safety_margin is None else safety_margin
    if bundle.estimated_tokens + margin <= max_input_tokens:
        return bundle

    logger.warning(
        "Prompt estimate %d exceeds budget %d (margin %d), compressing",
        bundle.estimated_tokens, max_input_tokens, margin,
    )

    system_prompt = bundle.system_prompt
    if estimate_tokens(system_prompt) > max_input_tokens * SYSTEM_PROMPT_SHARE:
        system_prompt = simplify_system_prompt(system_prompt)

    block_costs = [(block, estimate_tokens(block.text)) for block in bundle.blocks]
    frame_tokens = max(
        0,
        bundle.estimated_tokens
        - estimate_tokens(bundle.system_prompt)
        - sum(tokens for _, tokens in block_costs),
    )
    available = max_input_tokens - estimate_tokens(system_prompt) - frame_tokens - margin

    ranked = sorted(block_costs, key=lambda bc: _density(*bc), reverse=True)
    accepted: list[RoomBlock] = []
    used = 0
    for block, tokens in ranked:
        if used + tokens <= available:
            accepted.append(block)
            used += tokens

    if accepted:
        kept = tuple(b for b in bundle.blocks if b in accepted)
        dropped = [b.room for b in bundle.blocks if b not in accepted]
        logger.info("Kept %d of %d room blocks (dropped: %s)", len(kept), len(bundle.blocks), dropped)
    elif ranked:
        block, tokens = ranked[0]
        limit = math.floor(block.message_count * (max(available, 0) / tokens) * TRUNCATION_FACTOR)
        limit = min(block.message_count, max(MIN_TRUNCATED_MESSAGES, limit))
        logger.warning(
            "No room block fits %d tokens, truncating %s to %d of %d messages",
            available, block.room, limit, block.message_count,
        )
        kept = (RoomBlock(room=block.room, lines=block.lines[:limit]),)
    else:
        kept = ()

    fitted = build(system_prompt, kept, _compressed_summary(kept), compressed=True)

    # Summary wording can shift the estimate; drop the least dense blocks until it fits
    while len(fitted.blocks) > 1 and fitted.estimated_tokens > max_input_tokens:
        sparsest = min(fitted.blocks, key=lambda b: _density(b, estimate_tokens(b.text)))
        remaining = tuple(b for b in fitted.blocks if b is not sparsest)
        fitted = build(system_prompt, remaining, _compressed_summary(remaining), compressed=True)

    logger.info(
        "Compressed prompt: %d -> %d tokens, %d -> %d messages",
        bundle.estimated_tokens, fitted.estimated_tokens, bundle.message_count, fitted.message_count,
    )
    return fitted


def resolve_system_prompt(task: Task, templates: PromptTemplateStore) -> str:
    """Pick the system prompt for a task.

    Order: the task's inline prompt, the referenced template, the default
    template, a one-line fallback.

    Args:
        task: The task being run.
        templates: A prompt template store (``get_prompt_template``,
            ``get_default_prompt_template``).
    """
    if task.prompt and task.prompt.strip():
        return task.prompt.strip()

    template: Mapping | None = None
    if task.prompt_template_id is not None:
        template = templates.get_prompt_template(task.prompt_template_id)
        if template is None:
            logger.warning(
                "Prompt template %s for task %s not found, using default",
                task.prompt_template_id, task.id,
            )
    if template is None:
        template = templates.get_default_prompt_template()

    if template and str(template.get("system_prompt") or "").strip():
        return str(template["system_prompt"]).strip()
    return FALLBACK_SYSTEM_PROMPT
