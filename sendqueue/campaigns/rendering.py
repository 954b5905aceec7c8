"""
Rendering of frozen job payloads into the subject and HTML that get sent.
"""

import re
from dataclasses import dataclass
from typing import Any

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

from sendqueue.errors import SendQueueError

_SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_UNSUBSCRIBE_VAR = re.compile(r"\{\{\s*unsubscribeUrl\s*\}\}")
_OPEN_PIXEL_VAR = re.compile(r"\{\{\s*trackingOpenUrl\s*\}\}")

UNSUBSCRIBE_FOOTER = """
<div style="margin-top:24px;font-family:Arial,sans-serif;font-size:12px;color:#9ca3af;text-align:center;">
  <a href="{{ unsubscribeUrl }}" style="color:#6b7280;text-decoration:underline;">Unsubscribe</a>
</div>"""

OPEN_PIXEL = """
<img src="{{ trackingOpenUrl }}" width="1" height="1" style="display:none;opacity:0" alt="" />"""

_html_env = SandboxedEnvironment(autoescape=True)
_text_env = SandboxedEnvironment(autoescape=False)


class RenderError(SendQueueError):
    """A template could not be rendered. Retrying cannot fix it."""


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str


def prepare_html(html_source: str, variables: dict[str, Any]) -> str:
    """
    Post-process template source before rendering.

    Strips script tags, appends an unsubscribe footer when the template
    does not reference the unsubscribe URL itself, and appends the open
    tracking pixel.
    """
    html_source = _SCRIPT_TAG.sub("", html_source or "")
    if variables.get("unsubscribeUrl") and not _UNSUBSCRIBE_VAR.search(html_source):
        html_source += UNSUBSCRIBE_FOOTER
    if variables.get("trackingOpenUrl") and not _OPEN_PIXEL_VAR.search(html_source):
        html_source += OPEN_PIXEL
    return html_source


def render_email(subject_source: str, html_source: str, variables: dict[str, Any]) -> RenderedEmail:
    """
    Render subject and HTML with the recipient's merge fields.

    Args:
        subject_source: Subject template.
        html_source: HTML template.
        variables: Merge fields. Missing variables render empty.

    Returns:
        The rendered email.

    Raises:
        RenderError: If either template is invalid.
    """
    try:
        html = _html_env.from_string(prepare_html(html_source, variables)).render(**variables)
        subject = _text_env.from_string(subject_source or "").render(**variables)
    except TemplateError as exc:
        raise RenderError(f"Template render failed: {exc}") from exc
    return RenderedEmail(subject=subject.strip(), html=html)
