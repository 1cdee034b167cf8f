"""
Stage document rendering for phaseflow.

Loads one markdown template per stage from phaseflow/templates/ (or a
configured override directory) and interpolates variables.
Templates use Python str.format() syntax: {variable_name}
Use {{ and }} for literal braces.

HTML comments (<!-- ... -->) are stripped before rendering - use them for
documentation that shouldn't appear in the rendered document.

The workflow engine only depends on the Renderer protocol; any object with a
render(RenderRequest) -> str method can stand in for TemplateRenderer.
"""

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Protocol

from phaseflow.state.memory import format_memory_section
from phaseflow.workflow.models import Stage, now_iso

logger = logging.getLogger(__name__)

__all__ = [
    "TemplateError", "RenderRequest", "Renderer", "TemplateRenderer",
    "load_template", "build_section", "clear_cache", "TEMPLATES_DIR",
]

# Pattern to strip HTML comments (including multiline)
_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


class TemplateError(Exception):
    """Raised when template loading or rendering fails."""
    pass


@dataclass
class RenderRequest:
    """Everything a renderer gets for one stage generation."""
    phase_id: str
    title: str
    stage: Stage
    revision: int
    payload: dict = field(default_factory=dict)
    memory: list[str] = field(default_factory=list)
    prior_documents: dict[str, str] = field(default_factory=dict)  # stage name -> content


class Renderer(Protocol):
    def render(self, request: RenderRequest) -> str:
        ...


@lru_cache(maxsize=32)
def load_template(name: str, templates_dir: str | None = None) -> str:
    """
    Load a stage template by name (cached).

    Args:
        name: Template name without extension (e.g., 'spec', 'plan')
        templates_dir: Directory to load from; defaults to TEMPLATES_DIR

    Raises:
        TemplateError: If template file doesn't exist
    """
    template_path = Path(templates_dir or TEMPLATES_DIR) / f"{name}.md"

    if not template_path.exists():
        raise TemplateError(
            f"Template '{name}' not found. "
            f"Expected file: {template_path}"
        )

    logger.debug(f"Loading template: {template_path}")
    content = template_path.read_text()

    # Strip HTML comments (documentation only)
    content = _HTML_COMMENT_PATTERN.sub('', content)

    return content.lstrip()


def build_section(
    content: str | None,
    header: str,
    empty_msg: str | None = None
) -> str:
    """
    Build a markdown section if content exists.

    Returns:
        Formatted section string. Empty string if content is None AND empty_msg is None.
    """
    if content:
        return f"{header}\n\n{content}\n\n"
    elif empty_msg is not None:
        return f"{header}\n\n{empty_msg}\n\n"
    else:
        return ""


def format_payload(payload: dict) -> str:
    """Render payload fields as a markdown definition list."""
    lines = []
    for key, value in payload.items():
        label = str(key).replace("_", " ").capitalize()
        if isinstance(value, (list, tuple)):
            lines.append(f"**{label}:**")
            lines.extend(f"- {item}" for item in value)
        else:
            lines.append(f"**{label}:** {value}")
    return "\n".join(lines)


def format_prior_documents(prior_documents: dict[str, str]) -> str:
    parts = []
    for stage_name, content in prior_documents.items():
        parts.append(f"<details><summary>{stage_name}</summary>\n\n{content.strip()}\n\n</details>")
    return "\n\n".join(parts)


class TemplateRenderer:
    """Renders stage documents from markdown templates."""

    def __init__(self, templates_dir: Path | None = None):
        self.templates_dir = Path(templates_dir) if templates_dir else TEMPLATES_DIR

    def render(self, request: RenderRequest) -> str:
        template = load_template(request.stage.value, str(self.templates_dir))

        variables = {
            "phase_id": request.phase_id,
            "title": request.title,
            "stage": request.stage.value,
            "revision": request.revision,
            "generated_at": now_iso(),
            "directives_section": build_section(
                format_memory_section(request.memory), "## Directives"
            ),
            "payload_section": build_section(
                format_payload(request.payload), "## Inputs", empty_msg="_No inputs provided._"
            ),
            "prior_section": build_section(
                format_prior_documents(request.prior_documents), "## Approved Upstream Documents"
            ),
        }

        try:
            return template.format(**variables)
        except (KeyError, IndexError) as e:
            raise TemplateError(
                f"Missing required variable {e} in template '{request.stage.value}'. "
                f"Provided: {list(variables.keys())}"
            ) from e


def clear_cache():
    """Clear the template cache (useful for testing or hot-reload)."""
    load_template.cache_clear()
