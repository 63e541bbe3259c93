"""Email rendering and pre-send content checks."""
import hashlib
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from jinja2 import Environment, BaseLoader, select_autoescape
from markupsafe import Markup, escape

from db.static_links import StaticLink

EMAIL_TEMPLATE = """<!DOCTYPE html>
<html dir="{{ direction }}" lang="{{ lang }}">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ title }}</title>
    <style>
        body { font-family: 'Alef', Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; direction: {{ direction }}; }
        h1 { font-size: 28px; color: #4A148C; text-align: center; }
        .hero img { width: 100%; border-radius: 8px; }
        .body { line-height: 1.7; color: #333; font-size: 17px; }
        .links p { text-align: center; margin: 15px 0; font-weight: bold; }
        .links a { color: #4A148C; text-decoration: none; }
        .footer { margin-top: 40px; padding-top: 20px; border-top: 1px solid #ddd;
                  font-size: 12px; color: #999; text-align: center; }
    </style>
</head>
<body>
    <h1>{{ title }}</h1>
    {% if image_url %}<div class="hero"><img src="{{ image_url }}" alt="{{ title }}"></div>{% endif %}
    <div class="body">{{ body }}</div>
    {% if links %}
    <div class="links">
    {% for link in links %}
        {% if link.url %}<p><a href="{{ link.url }}">{{ link.fixed_text }}</a></p>
        {% elif link.fixed_text %}<p>{{ link.fixed_text }}</p>{% endif %}
    {% endfor %}
    </div>
    {% endif %}
    <div class="footer">
        <p>{{ footer }}</p>
    </div>
</body>
</html>
"""

_env = Environment(loader=BaseLoader(), autoescape=select_autoescape(default=True))
_template = _env.from_string(EMAIL_TEMPLATE)

_HTML_TAG = re.compile(r"<\s*(p|div|h[1-6]|ul|ol|br|img|a|strong|em|table)\b", re.IGNORECASE)
_HEBREW = re.compile(r"[\u0590-\u05FF]")


def format_url(url: Optional[str]) -> Optional[str]:
    """Normalize a link: mailto/tel/http kept, bare hosts get https://."""
    if not url:
        return None
    url = url.strip()
    if re.match(r"^(https?:|mailto:|tel:)", url, re.IGNORECASE):
        return url
    if "@" in url and " " not in url:
        return f"mailto:{url}"
    return f"https://{url}"


def _body_markup(body: str) -> Markup:
    """Body that already carries HTML is trusted; plain text is split into paragraphs."""
    if _HTML_TAG.search(body):
        return Markup(body)
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", body) if p.strip()]
    return Markup("\n").join(
        Markup("<p>{}</p>").format(Markup("<br>").join(escape(line) for line in p.splitlines()))
        for p in paragraphs
    )


def render(
    title: str,
    body_markup: str,
    image_url: Optional[str] = None,
    static_links: Sequence[StaticLink] = (),
    direction: str = "rtl",
    lang: str = "he",
    footer: str = "",
) -> str:
    """Render an article into the email HTML. Pure: same inputs, same output."""
    links = [
        {"url": format_url(link.url), "fixed_text": link.fixed_text}
        for link in static_links
        if link.url or link.fixed_text
    ]
    return _template.render(
        title=title,
        body=_body_markup(body_markup or ""),
        image_url=image_url,
        links=links,
        direction=direction,
        lang=lang,
        footer=footer,
    )


@dataclass
class ContentDiagnosis:
    """Outcome of validate_email_html. Only errors make it invalid."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def issues(self) -> List[str]:
        return self.errors + self.warnings


def validate_email_html(
    html: str,
    min_length: int = 100,
    max_length: int = 50000,
) -> ContentDiagnosis:
    """Check rendered HTML for signs of a broken template before sending."""
    errors: List[str] = []
    warnings: List[str] = []
    length = len(html)

    if length < min_length:
        errors.append(f"content suspiciously short ({length} chars)")
    if length > max_length:
        warnings.append(f"content exceeds {max_length} chars ({length}); may be clipped")

    lowered = html.lower()
    if "<!doctype html>" not in lowered and "<html" not in lowered:
        errors.append("missing DOCTYPE or <html> element")

    opening = len(re.findall(r"<body[\s>]", lowered))
    closing = lowered.count("</body>")
    if opening != closing or opening == 0:
        errors.append(f"unbalanced <body> tags ({opening} opening, {closing} closing)")

    if 'dir="rtl"' not in lowered and "direction: rtl" not in lowered:
        warnings.append("no RTL direction specified")
    if not _HEBREW.search(html):
        warnings.append("no Hebrew characters found")

    return ContentDiagnosis(is_valid=not errors, errors=errors, warnings=warnings)


def content_hash(html: str) -> str:
    """Short digest of the payload, logged for integrity tracing."""
    return hashlib.sha256(html.encode("utf-8")).hexdigest()[:16]
