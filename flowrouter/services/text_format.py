"""Outgoing text normalisation per Telegram parse mode."""

import re
from typing import Optional

# Tags the Bot API accepts in HTML parse mode
TELEGRAM_HTML_TAGS = {
    "b", "strong", "i", "em", "u", "ins", "s", "strike", "del",
    "span", "tg-spoiler", "a", "code", "pre", "blockquote", "tg-emoji",
}
# Attributes the Bot API defines per tag; everything else is dropped
TELEGRAM_HTML_ATTRIBUTES = {
    "a": {"href"},
    "span": {"class"},
    "code": {"class"},
    "tg-emoji": {"emoji-id"},
}
TAG_PATTERN = re.compile(r"<(/?)([a-zA-Z][a-zA-Z0-9-]*)([^<>]*)>")
ATTRIBUTE_PATTERN = re.compile(r"""([a-zA-Z][a-zA-Z0-9-]*)\s*=\s*("[^"]*"|'[^']*'|[^\s"'<>]+)""")
ENTITY_PATTERN = re.compile(r"&(#\d+|#x[0-9a-fA-F]+|[a-zA-Z]+);")
MARKDOWN_V2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def _escape_html_text(value: str) -> str:
    out = []
    position = 0
    for match in ENTITY_PATTERN.finditer(value):
        out.append(value[position:match.start()].replace("&", "&amp;"))
        out.append(match.group(0))
        position = match.end()
    out.append(value[position:].replace("&", "&amp;"))
    return "".join(out).replace("<", "&lt;").replace(">", "&gt;")


def _allowed_attributes(tag: str, raw: str) -> str:
    allowed = TELEGRAM_HTML_ATTRIBUTES.get(tag)
    if not allowed:
        return ""
    kept = []
    for name, raw_value in ATTRIBUTE_PATTERN.findall(raw):
        name = name.lower()
        if name in allowed:
            value = raw_value[1:-1] if raw_value[0] in "\"'" else raw_value
            value = value.replace('"', "&quot;")
            kept.append(f' {name}="{value}"')
    return "".join(kept)


def sanitize_html(value: str) -> str:
    """Keep Bot API formatting tags and their defined attributes, drop everything else and escape stray markup."""
    out = []
    position = 0
    for match in TAG_PATTERN.finditer(value):
        out.append(_escape_html_text(value[position:match.start()]))
        closing, name, attributes = match.groups()
        tag = name.lower()
        if tag in TELEGRAM_HTML_TAGS:
            kept = "" if closing else _allowed_attributes(tag, attributes)
            out.append(f"<{closing}{tag}{kept}>")
        position = match.end()
    out.append(_escape_html_text(value[position:]))
    return "".join(out)


def escape_markdown_v2(value: str) -> str:
    return MARKDOWN_V2_SPECIAL.sub(r"\\\1", value)


def normalize_text(value: str, parse_mode: Optional[str]) -> str:
    if parse_mode == "HTML":
        return sanitize_html(value)
    if parse_mode == "MarkdownV2":
        return escape_markdown_v2(value)
    return value
