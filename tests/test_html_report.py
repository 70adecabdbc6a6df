"""Tests for html_report module."""

from chatlens.exceptions import USER_MESSAGES, ErrorKind
from chatlens.html_report import (
    ReportContext,
    classify_output,
    postprocess,
    render_failure,
    repair_truncated_document,
    strip_scaffolding,
)
from chatlens.models import OutputShape

CONTEXT = ReportContext(task_name="weekly", room="dev", message_count=42, model="DeepSeek Chat")


def test_fenced_document_with_chatter_is_extracted():
    raw = "这里是代码：\n```html\n<!DOCTYPE html><html><body>x</body></html>\n```\nas requested"
    shape, html = postprocess(raw, CONTEXT)

    assert shape == OutputShape.FENCED_DOCUMENT
    assert html.startswith("<!DOCTYPE html>")
    assert html.endswith("</html>")
    assert "as requested" not in html


def test_full_document_is_trimmed_of_surrounding_prose():
    raw = "Here you go:\n<!DOCTYPE html><html><body>r</body></html>\nHope it helps"
    shape, html = postprocess(raw, CONTEXT)

    assert shape == OutputShape.FULL_DOCUMENT
    assert html == "<!DOCTYPE html><html><body>r</body></html>"


def test_plain_text_is_wrapped_verbatim():
    raw = "The group discussed release dates.\nNo conflicts were found."
    shape, html = postprocess(raw, CONTEXT)

    assert shape == OutputShape.PLAIN_TEXT
    assert raw in html
    assert html.startswith("<!DOCTYPE html>")
    assert 'class="content plain"' in html


def test_plain_text_special_characters_are_escaped():
    shape, html = postprocess("Tom & Jerry said 1 < 2", CONTEXT)
    assert shape == OutputShape.PLAIN_TEXT
    assert "Tom &amp; Jerry said 1 &lt; 2" in html


def test_partial_markup_is_wrapped_unescaped():
    raw = "<h2>Topics</h2><p>Release planning</p>"
    shape, html = postprocess(raw, CONTEXT)

    assert shape == OutputShape.PARTIAL_HTML
    assert "<h2>Topics</h2><p>Release planning</p>" in html
    assert "weekly - dev" in html


def test_truncated_document_is_closed():
    raw = "<!DOCTYPE html><html><body><div>cut off<sp"
    shape, html = postprocess(raw, CONTEXT)

    assert shape == OutputShape.PARTIAL_HTML
    assert "<sp" not in html
    assert html.endswith("</body>\n</html>")


def test_repair_leaves_closed_body_alone():
    doc = repair_truncated_document("<html><body>x</body>")
    assert doc.count("</body>") == 1
    assert doc.endswith("</html>")


def test_classify_output_shapes():
    assert classify_output("<!DOCTYPE html><html></html>") == OutputShape.FULL_DOCUMENT
    assert classify_output("```html\n<html><body></body></html>\n```") == OutputShape.FENCED_DOCUMENT
    assert classify_output("<div>x</div>") == OutputShape.PARTIAL_HTML
    assert classify_output("just words") == OutputShape.PLAIN_TEXT


def test_strip_scaffolding_keeps_only_the_fence():
    raw = "Sure!\n```html\n<html><body>a</body></html>\n```\nDone."
    assert strip_scaffolding(raw) == "```html\n<html><body>a</body></html>\n```"


def test_render_failure_shows_user_message():
    html = render_failure(CONTEXT, ErrorKind.TIMEOUT, detail="provider took too long")

    assert USER_MESSAGES[ErrorKind.TIMEOUT] in html
    assert "provider took too long" in html
    assert "42条" in html
    assert "DeepSeek Chat" in html
    assert 'class="content error"' in html


def test_every_failure_kind_has_a_chinese_message():
    for kind in ErrorKind:
        html = render_failure(CONTEXT, kind)
        assert USER_MESSAGES[kind] in html
        assert any("一" <= ch <= "鿿" for ch in USER_MESSAGES[kind]), kind
