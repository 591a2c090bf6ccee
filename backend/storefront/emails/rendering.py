import html as _html
import re
from typing import Any, Tuple

from jinja2 import Environment, PackageLoader, select_autoescape

env = Environment(
    loader=PackageLoader("storefront.emails", "templates"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def format_money(value: Any) -> str:
    try:
        return f"{float(value):.2f}"
    except (TypeError, ValueError):
        return "0.00"


env.filters["money"] = format_money

_BLOCK_TAGS = re.compile(r"<\s*(br|/p|/div|/h[1-6]|/tr|/li)\s*/?>", re.I)
_TAGS = re.compile(r"<[^>]+>")
_STYLE = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.I | re.S)


def html_to_text(html: str) -> str:
    """Plain-text alternative for an HTML body."""
    text = _STYLE.sub("", html or "")
    text = _BLOCK_TAGS.sub("\n", text)
    text = _TAGS.sub("", text)
    text = _html.unescape(text)
    lines = [re.sub(r"[ \t]+", " ", ln).strip() for ln in text.splitlines()]
    out = []
    for ln in lines:
        if ln or (out and out[-1]):
            out.append(ln)
    return "\n".join(out).strip()


def render(template: str, **context: Any) -> Tuple[str, str]:
    """Render `templates/<template>.html`; returns (html, text)."""
    html = env.get_template(f"{template}.html").render(**context)
    return html, html_to_text(html)
