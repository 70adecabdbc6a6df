"""Turn raw model output into a well-formed HTML report.

Post-processing is split in two pure steps: ``classify_output`` decides
which of four shapes the (scaffolding-trimmed) output has, and
``render_report`` formats each shape.

    full_document    -> used verbatim
    fenced_document  -> the fenced document is extracted
    partial_html     -> wrapped in the report shell, markup preserved
                        (a truncated document is closed instead)
    plain_text       -> wrapped in the report shell, escaped
"""

import html
import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup

from chatlens.exceptions import USER_MESSAGES, ErrorKind
from chatlens.models import OutputShape
from chatlens.time_window import now_local

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"```(?:html|HTML)?[ \t]*\r?\n(.*?)\r?\n?```", re.DOTALL)
DOC_START_PATTERN = re.compile(r"<!DOCTYPE\s+html|<html[\s>]", re.IGNORECASE)
OPEN_FENCE_PATTERN = re.compile(r"^```(?:html|HTML)?[ \t]*\r?\n?")
CLOSE_FENCE_PATTERN = re.compile(r"\r?\n?```\s*$")
DANGLING_TAG_PATTERN = re.compile(r"<[^<>]*$")

# Tags that mark output as markup rather than prose
MARKUP_TAGS = [
    "html", "head", "body", "main", "section", "article", "header", "footer", "nav",
    "div", "span", "p", "br", "hr", "a", "img", "style",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li", "table", "thead", "tbody", "tr", "td", "th",
    "strong", "em", "b", "i", "pre", "code", "blockquote",
]

REPORT_SHELL = """<!DOCTYPE html>
<html lang="zh-CN">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{title}</title>
<style>
body {{ font-family: -apple-system, "PingFang SC", "Microsoft YaHei", sans-serif;
       background: #fdf6ec; color: #3d3027; margin: 0; padding: 24px; line-height: 1.7; }}
.report {{ max-width: 960px; margin: 0 auto; background: #fff; border-radius: 16px;
          box-shadow: 0 4px 18px rgba(120, 72, 24, 0.12); overflow: hidden; }}
.report-header {{ background: linear-gradient(135deg, #f59e0b, #ea580c); color: #fff; padding: 24px 32px; }}
.report-header h1 {{ margin: 0 0 8px; font-size: 24px; }}
.meta {{ font-size: 14px; opacity: 0.9; }}
.content {{ padding: 24px 32px; }}
.content.plain {{ white-space: pre-wrap; word-break: break-word; }}
.content.error {{ white-space: pre-wrap; color: #9a3412; background: #fff7ed; }}
</style>
</head>
<body>
<div class="report">
<div class="report-header">
<h1>{title}</h1>
<div class="meta">{meta}</div>
</div>
<div class="{content_class}">{content}</div>
</div>
</body>
</html>
"""


@dataclass(frozen=True)
class ReportContext:
    """What the shell shows around the model's content."""

    task_name: str
    room: str
    message_count: int = 0
    model: str = ""


def _is_full_document(text: str) -> bool:
    stripped = text.strip()
    return bool(DOC_START_PATTERN.match(stripped)) and "</html>" in stripped.lower()


def _fenced_document(text: str) -> str | None:
    """Return the content of the first fence that holds a full document."""
    for match in FENCE_PATTERN.finditer(text):
        inner = match.group(1).strip()
        if _is_full_document(inner):
            return inner
    return None


def _has_markup(text: str) -> bool:
    soup = BeautifulSoup(text, "html.parser")
    return soup.find(MARKUP_TAGS) is not None


def strip_scaffolding(text: str) -> str:
    """Trim the chatter models put around their markup.

    A fenced full document keeps only its fence. Otherwise everything
    before the document start and after the last ``</html>`` is dropped.
    """
    text = (text or "").strip()

    fenced = _fenced_document(text)
    if fenced is not None:
        return f"```html\n{fenced}\n```"

    start = DOC_START_PATTERN.search(text)
    if start:
        text = text[start.start():]
        end = text.lower().rfind("</html>")
        if end >= 0:
            text = text[:end + len("</html>")]
    return text.strip()


def classify_output(text: str) -> OutputShape:
    """Decide the shape of model output."""
    if _is_full_document(text):
        return OutputShape.FULL_DOCUMENT
    if _fenced_document(text) is not None:
        return OutputShape.FENCED_DOCUMENT
    if _has_markup(text):
        return OutputShape.PARTIAL_HTML
    return OutputShape.PLAIN_TEXT


def repair_truncated_document(doc: str) -> str:
    """Close a document that was cut off before ``</body></html>``."""
    doc = DANGLING_TAG_PATTERN.sub("", doc.rstrip()).rstrip()
    lower = doc.lower()
    if "<body" in lower and "</body>" not in lower:
        doc += "\n</body>"
    if "</html>" not in lower:
        doc += "\n</html>"
    return doc


def _meta_line(context: ReportContext) -> str:
    parts = [f"群聊：{context.room}", f"消息数：{context.message_count}"]
    if context.model:
        parts.append(f"模型：{context.model}")
    parts.append(f"生成时间：{now_local().strftime('%Y-%m-%d %H:%M')}")
    return html.escape(" · ".join(parts), quote=False)


def wrap_in_shell(content: str, context: ReportContext, content_class: str = "content") -> str:
    """Place already-safe ``content`` inside the standard report page."""
    title = html.escape(f"{context.task_name} - {context.room} 分析报告", quote=False)
    return REPORT_SHELL.format(
        title=title,
        meta=_meta_line(context),
        content_class=content_class,
        content=content,
    )


def render_report(text: str, shape: OutputShape, context: ReportContext) -> str:
    """Format classified output into the final HTML page."""
    if shape == OutputShape.FULL_DOCUMENT:
        return text.strip()

    if shape == OutputShape.FENCED_DOCUMENT:
        return _fenced_document(text)

    if shape == OutputShape.PARTIAL_HTML:
        body = CLOSE_FENCE_PATTERN.sub("", OPEN_FENCE_PATTERN.sub("", text.strip())).strip()
        if DOC_START_PATTERN.match(body):
            logger.warning("Model output is a truncated document, closing it")
            return repair_truncated_document(body)
        return wrap_in_shell(body, context)

    return wrap_in_shell(html.escape(text, quote=False), context, "content plain")


def postprocess(raw: str, context: ReportContext) -> tuple[OutputShape, str]:
    """Trim, classify and render raw model output."""
    cleaned = strip_scaffolding(raw)
    shape = classify_output(cleaned)
    logger.info("Model output for %s classified as %s", context.room, shape)
    return shape, render_report(cleaned, shape, context)


def render_failure(context: ReportContext, kind: ErrorKind, detail: str = "") -> str:
    """Report page explaining why a room's analysis failed."""
    lines = [
        "❌ 分析失败",
        "",
        USER_MESSAGES[kind],
    ]
    if detail:
        lines.append(f"详情：{detail}")
    lines.append("")
    lines.append(f"📊 分析的消息数量：{context.message_count}条")
    if context.model:
        lines.append(f"🤖 模型：{context.model}")
    lines.append(f"🕐 时间：{now_local().strftime('%Y-%m-%d %H:%M:%S')}")
    content = html.escape("\n".join(lines), quote=False)
    return wrap_in_shell(content, context, "content error")
