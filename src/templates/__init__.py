"""
Jinja2 templates for console reports.

Report layouts are stored as .j2 templates in this directory.
Use render() to produce text with template variables.
"""

from jinja2 import Environment, FileSystemLoader
from pathlib import Path

_TEMPLATES_DIR = Path(__file__).parent


_env = Environment(
    loader=FileSystemLoader(_TEMPLATES_DIR),
    autoescape=False,  # Plain-text console output
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


def render(template_name: str, **kwargs) -> str:
    """Render a template with given parameters.

    Args:
        template_name: Path relative to the templates dir (e.g., "console.j2")
        **kwargs: Template variables

    Returns:
        Rendered text
    """
    template = _env.get_template(template_name)
    return template.render(**kwargs)
