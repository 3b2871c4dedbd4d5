"""Report and message rendering using Jinja2 templates.

Templates live in ``cvesentry/templates/``:

- ``cycle_summary.md.j2``: operator-facing cycle summary, printed by
  ``cvesentry run`` and ``cvesentry status``.
- ``telegram_message.html.j2``: subscriber notification body.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

_TEMPLATES_DIR = Path(__file__).parent / "templates"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATES_DIR)),
        autoescape=select_autoescape(enabled_extensions=("html", "html.j2"), default_for_string=False, default=False),
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_template(name: str, **context: Any) -> str:
    """Render one of the package templates.

    HTML templates are autoescaped; Markdown ones are not.
    """
    return _environment().get_template(name).render(**context)


def render_cycle_summary(summary: Any) -> str:
    """Render a cycle summary as Markdown.

    Args:
        summary: ``CycleSummary`` or the dict form stored by
            ``state.save_summary``.

    Returns:
        Rendered Markdown text.
    """
    data = summary.to_dict() if hasattr(summary, "to_dict") else dict(summary)
    errors = sorted((data.get("errors") or {}).items(), key=lambda kv: (-kv[1], kv[0]))
    return render_template("cycle_summary.md.j2", s=data, errors=errors)
