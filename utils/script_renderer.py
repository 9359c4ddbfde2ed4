import re
import shlex
import logging
from typing import Any, Dict, Optional

import yaml
from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
    TemplateNotFound as JinjaTemplateNotFound,
    UndefinedError,
)

from config.settings import settings
from core.exceptions import RenderError, TemplateNotFound

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".sh.j2"
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class ScriptRenderer:
    """Renders ``ScriptTask`` objects from Jinja2 shell templates.

    Template ids are dotted (``workspace.create_user``) and resolve to
    ``<templates_path>/workspace/create_user.sh.j2``.
    """

    def __init__(self, templates_path: Optional[str] = None):
        self.templates_path = templates_path or settings.SCRIPT_TEMPLATES_PATH
        self.env = Environment(
            loader=FileSystemLoader(self.templates_path),
            autoescape=False,  # shell, not HTML
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["shell_quote"] = _shell_quote

    @staticmethod
    def template_file(template_id: str) -> str:
        return template_id.replace(".", "/") + TEMPLATE_SUFFIX

    def render(self, task) -> str:
        return self.render_template(task.template, task.parameters())

    def render_template(self, template_id: str, parameters: Dict[str, Any]) -> str:
        try:
            template = self.env.get_template(self.template_file(template_id))
        except JinjaTemplateNotFound:
            raise TemplateNotFound(template_id)

        try:
            rendered = template.render(**parameters)
        except UndefinedError as e:
            raise RenderError(f"Missing parameter for template '{template_id}': {e}")
        except TemplateError as e:
            raise RenderError(f"Template rendering error for '{template_id}': {e}")

        logger.debug(f"Rendered template {template_id} ({len(rendered)} chars)")
        return rendered


def fill_placeholders(text: str, values: Dict[str, Any]) -> str:
    """Replace ``{{name}}`` slots in task-authored text; every slot must be filled."""

    def replace(match):
        key = match.group(1)
        if key not in values or values[key] is None:
            raise RenderError(f"No value for placeholder '{key}'")
        return str(values[key])

    return PLACEHOLDER_PATTERN.sub(replace, text)


def fill_compose_yaml(text: str, values: Dict[str, Any]) -> str:
    """Fill a docker-compose document and check it still parses as YAML."""
    filled = fill_placeholders(text, values)
    try:
        document = yaml.safe_load(filled)
    except yaml.YAMLError as e:
        raise RenderError(f"docker-compose YAML is invalid after filling placeholders: {e}")
    if not isinstance(document, dict):
        raise RenderError("docker-compose YAML must be a mapping")
    return filled


def _shell_quote(value: Any) -> str:
    return shlex.quote(str(value))


# Global instance
script_renderer = ScriptRenderer()
