from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError

TEMPLATES_DIR = Path(__file__).parent / "templates"

EDIT_TEMPLATE = "edit.j2"
ITERATIVE_TEMPLATE = "edit_iterative.j2"


class PromptResolutionError(Exception):
    """Raised when a prompt template cannot be resolved."""

    pass


@dataclass
class ResolvedPrompt:
    """Container for a resolved prompt with its metadata."""

    template_name: str
    params: dict[str, Any]
    resolved_text: str


class PromptResolver:
    def __init__(self, templates_dir: Optional[Path] = None):
        self.templates_dir = templates_dir or TEMPLATES_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(self.templates_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, params: dict[str, Any]) -> str:
        """Render a template and return the resolved text on a single line.

        Raises:
            PromptResolutionError: If template not found or variable undefined.
        """
        try:
            tpl = self.env.get_template(template_name)
            text = tpl.render(**params)
        except TemplateNotFound as e:
            raise PromptResolutionError(
                f"Template '{template_name}' not found in {self.templates_dir}"
            ) from e
        except UndefinedError as e:
            raise PromptResolutionError(
                f"Undefined variable in template '{template_name}': {e}"
            ) from e
        return " ".join(text.split())

    def resolve(self, template_name: str, params: dict[str, Any]) -> ResolvedPrompt:
        resolved_text = self.render(template_name, params)
        return ResolvedPrompt(
            template_name=template_name,
            params=params,
            resolved_text=resolved_text,
        )


def enhance_prompt(
    instruction: str,
    iterative: bool = False,
    uploaded: bool = False,
    resolver: Optional[PromptResolver] = None,
) -> ResolvedPrompt:
    """Wrap a user's edit instruction in the edit prompt sent upstream.

    ``iterative`` continues a previous generation; otherwise ``uploaded``
    says whether the image came from the user's own upload.
    """
    resolver = resolver or PromptResolver()
    instruction = instruction.strip().rstrip(".")
    if iterative:
        return resolver.resolve(ITERATIVE_TEMPLATE, {"instruction": instruction})
    return resolver.resolve(EDIT_TEMPLATE, {"instruction": instruction, "uploaded": uploaded})
