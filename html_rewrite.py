"""Pattern-based rewriting of newsletter HTML before it is published.

Neither function here parses or repairs HTML; each one only applies the
substitutions it documents and leaves all other markup untouched.
"""

from __future__ import annotations

import re


FORWARD_HEADER_LABELS = ("From", "Subject", "Date", "To", "Reply-To", "Cc", "Bcc")
CONTAINER_CLASS = "nl-container"
THEME_BACKGROUND_DECLARATION = "background-color: var(--wp--preset--color--background);"
FORCED_TEXT_COLOR_DECLARATION = "color: #000000;"

CITE_QUOTE_PATTERN = re.compile(
    r"<blockquote\b[^>]*\btype\s*=\s*[\"']?cite[\"']?[^>]*>(?P<inner>.*)</blockquote\s*>",
    re.IGNORECASE | re.DOTALL,
)
FORWARD_MARKER_PATTERN = re.compile(
    r"<(?P<tag>div|p|span)\b[^>]*>\s*Begin forwarded message:\s*</(?P=tag)\s*>",
    re.IGNORECASE,
)
SOFT_BREAK_PATTERN = re.compile(
    r"<br\b[^>]*\bclass\s*=\s*[\"']?Apple-interchange-newline[\"']?[^>]*>",
    re.IGNORECASE,
)
FORWARD_HEADER_BLOCK_PATTERN = re.compile(
    r"<(?P<tag>div|p)\b[^>]*>\s*(?:<span\b[^>]*>\s*)?<b\b[^>]*>\s*"
    r"(?:" + "|".join(re.escape(label) for label in FORWARD_HEADER_LABELS) + r")\s*:\s*</b\s*>"
    r".*?</(?P=tag)\s*>",
    re.IGNORECASE | re.DOTALL,
)
LEADING_BREAKS_PATTERN = re.compile(r"^(?:\s*<br\b[^>]*>)+", re.IGNORECASE)
DIV_TAG_PATTERN = re.compile(r"<(?P<closing>/?)div\b[^>]*>", re.IGNORECASE)
BODY_PATTERN = re.compile(r"<body\b[^>]*>(?P<inner>.*)</body\s*>", re.IGNORECASE | re.DOTALL)

ANCHOR_PATTERN = re.compile(r"<a\b[^>]*>(?P<text>(?:(?!<a\b).)*?)</a\s*>", re.IGNORECASE | re.DOTALL)
TAG_PATTERN = re.compile(r"<[^>]+>")
UNSUBSCRIBE_PATTERN = re.compile(r"\bunsubscribe\b", re.IGNORECASE)
CONTAINER_TAG_PATTERN = re.compile(
    r"<(?P<tag>[a-z][\w-]*)\b(?P<attrs>[^>]*?\bclass\s*=\s*(?P<quote>[\"'])[^\"']*"
    r"(?<![\w-])" + re.escape(CONTAINER_CLASS) + r"(?![\w-])[^\"']*(?P=quote)[^>]*?)\s*(?P<end>/?)>",
    re.IGNORECASE,
)
STYLE_ATTR_PATTERN = re.compile(
    r"(?<![\w-])style\s*=\s*(?P<quote>[\"'])(?P<style>.*?)(?P=quote)",
    re.IGNORECASE | re.DOTALL,
)
BACKGROUND_COLOR_PATTERN = re.compile(r"background-color\s*:\s*[^;]+;?", re.IGNORECASE)


def unwrap_single_div(html: str) -> str:
    """Drop one enclosing ``<div>`` when it wraps the whole fragment."""
    stripped = html.strip()
    tags = list(DIV_TAG_PATTERN.finditer(stripped))
    if not tags:
        return html
    first, last = tags[0], tags[-1]
    if first.start() != 0 or first.group("closing") or last.end() != len(stripped) or not last.group("closing"):
        return html

    depth = 0
    for index, tag in enumerate(tags):
        depth += -1 if tag.group("closing") else 1
        if depth == 0 and index != len(tags) - 1:
            return html
    if depth != 0:
        return html
    return stripped[first.end() : last.start()]


def extract_forwarded_content(html: str) -> str:
    """Return the original newsletter markup from a forwarded message.

    Apple Mail style forwards keep the newsletter inside
    ``<blockquote type="cite">`` preceded by bolded From/Subject/Date/To
    blocks; those blocks and the "Begin forwarded message:" marker are
    removed. Messages that were not forwarded are reduced to their
    ``<body>`` content when they have one, and returned as-is otherwise.
    """
    quote_match = CITE_QUOTE_PATTERN.search(html)
    if quote_match:
        content = quote_match.group("inner")
        content = FORWARD_MARKER_PATTERN.sub("", content)
        content = SOFT_BREAK_PATTERN.sub("", content)
        content = FORWARD_HEADER_BLOCK_PATTERN.sub("", content)
        content = LEADING_BREAKS_PATTERN.sub("", content)
        content = unwrap_single_div(content)
        return content.strip()

    body_match = BODY_PATTERN.search(html)
    if body_match:
        return body_match.group("inner").strip()
    return html


def _drop_unsubscribe_anchor(match: re.Match[str]) -> str:
    visible_text = TAG_PATTERN.sub("", match.group("text"))
    if UNSUBSCRIBE_PATTERN.search(visible_text):
        return ""
    return match.group(0)


def _rewrite_container_tag(match: re.Match[str]) -> str:
    attrs = match.group("attrs")
    style_match = STYLE_ATTR_PATTERN.search(attrs)
    if style_match is None:
        attrs = f'{attrs} style="{FORCED_TEXT_COLOR_DECLARATION}"'
    else:
        style = BACKGROUND_COLOR_PATTERN.sub(THEME_BACKGROUND_DECLARATION, style_match.group("style"))
        style = f"{FORCED_TEXT_COLOR_DECLARATION} {style.strip()}".rstrip()
        quote = style_match.group("quote")
        attrs = f"{attrs[: style_match.start()]}style={quote}{style}{quote}{attrs[style_match.end() :]}"
    end = " /" if match.group("end") else ""
    return f"<{match.group('tag')}{attrs}{end}>"


def clean_html(html: str) -> str:
    """Remove unsubscribe links and restyle the newsletter container.

    The ``nl-container`` element gets the theme background variable in place
    of its inline background colour and a forced black text colour.
    """
    html = ANCHOR_PATTERN.sub(_drop_unsubscribe_anchor, html)
    html = CONTAINER_TAG_PATTERN.sub(_rewrite_container_tag, html)
    return html
