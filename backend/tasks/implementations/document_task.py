"""Document generation task.

Renders a Jinja2 template with the instance variables and writes the result
to a file.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from app.config import get_settings
from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)


class DocumentGenerationTask(BaseTask):
    """Render a template to a file and report its size.

    Config:
        template: Inline Jinja2 template text
        template_path: Path to a template file (alternative to template)
        output_path: Target file; relative paths land in DOCUMENT_OUTPUT_DIR (required)
        context: Extra template values layered over the instance variables
        encoding: Output encoding (default: utf-8)
    """

    task_type = "document_generation"
    display_name = "Document Generation"
    description = "Render a template into a document file"

    async def execute(self, config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        template_text = config.get("template")
        template_path = config.get("template_path")
        output_path = config.get("output_path")
        if not template_text and not template_path:
            return TaskResult(success=False, error="Missing required config: template or template_path")
        if not output_path:
            return TaskResult(success=False, error="Missing required config: output_path")

        values = {**((context or {}).get("variables") or {}), **(config.get("context") or {})}
        target = Path(output_path)
        if not target.is_absolute():
            target = Path(get_settings().DOCUMENT_OUTPUT_DIR) / target

        try:
            rendered = self._render(template_text, template_path, values)
        except (TemplateError, OSError) as e:
            return TaskResult(success=False, error=f"Template rendering failed: {e}")

        encoding = config.get("encoding", "utf-8")
        try:
            size = await asyncio.to_thread(self._write, target, rendered, encoding)
        except OSError as e:
            return TaskResult(success=False, error=f"Cannot write document: {e}")

        logger.info("Document generated", path=str(target), size_bytes=size)
        return TaskResult(
            success=True,
            output={"document_path": str(target), "document_size": size},
        )

    @staticmethod
    def _render(template_text: Optional[str], template_path: Optional[str], values: dict) -> str:
        if template_text:
            env = Environment(undefined=StrictUndefined, autoescape=False)
            template = env.from_string(template_text)
        else:
            path = Path(template_path)
            env = Environment(
                loader=FileSystemLoader(str(path.parent)),
                undefined=StrictUndefined,
                autoescape=False,
            )
            template = env.get_template(path.name)
        return template.render(**values)

    @staticmethod
    def _write(target: Path, content: str, encoding: str) -> int:
        target.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode(encoding)
        target.write_bytes(data)
        return len(data)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["output_path"],
            "properties": {
                "template": {"type": "string"},
                "template_path": {"type": "string"},
                "output_path": {"type": "string"},
                "context": {"type": "object"},
                "encoding": {"type": "string", "default": "utf-8"},
            },
        }


# Export for task registry
DOCUMENT_TASK_TYPES = {
    "document_generation": DocumentGenerationTask,
}
