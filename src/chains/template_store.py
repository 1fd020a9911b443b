"""Loading of ``.chatml`` prompt templates with YAML front matter."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from src.services.exceptions import NotFoundError

LOGGER = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".chatml"

_FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


class TemplateFrontMatter(BaseModel):
    """Metadata block at the top of a template file."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    source_language: str = Field(alias="sourceLanguage")
    target_language: str = Field(alias="targetLanguage")
    description: Optional[str] = None


@dataclass(frozen=True)
class PromptTemplate:
    """A loaded prompt template."""

    id: str
    title: str
    source_language: str
    target_language: str
    content: str
    description: Optional[str] = None

    def summary(self) -> Dict[str, Optional[str]]:
        return {
            "id": self.id,
            "title": self.title,
            "sourceLanguage": self.source_language,
            "targetLanguage": self.target_language,
            "description": self.description,
        }


class TemplateError(ValueError):
    """Raised when a template file cannot be loaded."""


def parse_template(template_id: str, text: str) -> PromptTemplate:
    """Split front matter from the template body and validate it.

    Raises:
        TemplateError: If the front matter is missing or invalid.
    """

    match = _FRONT_MATTER.match(text)
    if match is None:
        raise TemplateError(f"Template '{template_id}' has no front matter block")
    try:
        meta = TemplateFrontMatter.model_validate(yaml.safe_load(match.group(1)) or {})
    except (yaml.YAMLError, PydanticValidationError) as exc:
        raise TemplateError(f"Template '{template_id}' has invalid front matter: {exc}") from exc

    return PromptTemplate(
        id=template_id,
        title=meta.title,
        source_language=meta.source_language,
        target_language=meta.target_language,
        description=meta.description,
        content=text[match.end():],
    )


class PromptTemplateStore:
    """In-memory catalogue of prompt templates keyed by file stem."""

    def __init__(self, directory: Optional[Path | str] = None) -> None:
        self._directory = Path(directory) if directory else None
        self._templates: Dict[str, PromptTemplate] = {}

    def load(self) -> int:
        """Read every ``*.chatml`` file in the template directory.

        Returns:
            Number of templates loaded.

        Raises:
            TemplateError: If the directory is missing or a file is invalid.
        """
        if self._directory is None or not self._directory.is_dir():
            raise TemplateError(f"Prompt directory not found: {self._directory}")

        loaded: Dict[str, PromptTemplate] = {}
        for path in sorted(self._directory.glob(f"*{TEMPLATE_SUFFIX}")):
            template = parse_template(path.stem, path.read_text(encoding="utf-8"))
            loaded[template.id] = template

        if not loaded:
            LOGGER.warning("No %s templates found in %s", TEMPLATE_SUFFIX, self._directory)
        self._templates.update(loaded)
        LOGGER.info("Loaded %d prompt templates from %s", len(loaded), self._directory)
        return len(loaded)

    def register(self, template: PromptTemplate) -> None:
        self._templates[template.id] = template

    def get(self, template_id: str) -> Optional[PromptTemplate]:
        return self._templates.get(template_id)

    def get_or_raise(self, template_id: str) -> PromptTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}", code="TEMPLATE_NOT_FOUND")
        return template

    def list_templates(self) -> List[PromptTemplate]:
        return sorted(self._templates.values(), key=lambda t: t.id)

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)
