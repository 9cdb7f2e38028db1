"""
Message templates.

Templates hold a subject and text/HTML bodies with ``$name`` (or
``${name}``) placeholders. Composing from a template substitutes the
values given with the message; placeholders without a value are left in
place so the sender can see what is missing.
"""
import html
from string import Template as TextTemplate
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from studio_inbox.core.database.models import Template
from .models import _reject_nulls


def template_variables(*texts: Optional[str]) -> List[str]:
    """Placeholder names used in the given texts, sorted"""
    names = set()
    for text in texts:
        if not text:
            continue
        for match in TextTemplate.pattern.finditer(text):
            name = match.group("named") or match.group("braced")
            if name:
                names.add(name)
    return sorted(names)


def _check_variables(values: List[str]) -> List[str]:
    cleaned = sorted({v.strip() for v in values if v and v.strip()})
    invalid = [v for v in cleaned if not v.isidentifier()]
    if invalid:
        raise ValueError(f"Invalid variable names: {', '.join(invalid)}")
    return cleaned


class TemplateInput(BaseModel):
    """Template create payload. variables default to the placeholders found in the text."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    subject: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    variables: List[str] = Field(default_factory=list)
    category: Optional[str] = Field(None, max_length=100)
    is_default: bool = False

    @field_validator("variables")
    @classmethod
    def _variables(cls, v):
        return _check_variables(v)

    @model_validator(mode="after")
    def _content(self):
        if not (self.subject or self.body_text or self.body_html):
            raise ValueError("A template needs a subject or a body")
        if not self.variables:
            self.variables = template_variables(self.subject, self.body_text, self.body_html)
        return self


class TemplateUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    subject: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    variables: Optional[List[str]] = None
    category: Optional[str] = Field(None, max_length=100)
    is_default: Optional[bool] = None

    @field_validator("variables")
    @classmethod
    def _variables(cls, v):
        return _check_variables(v) if v is not None else None

    @model_validator(mode="after")
    def _not_null(self):
        return _reject_nulls(self, ("name", "variables", "is_default"))


class RenderedTemplate(BaseModel):
    subject: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None


def render_template(template: Template, values: Dict[str, str]) -> RenderedTemplate:
    """Substitute values into the template; HTML values are escaped"""
    escaped = {k: html.escape(str(v)) for k, v in values.items()}

    def fill(text: Optional[str], mapping: Dict[str, str]) -> Optional[str]:
        if text is None:
            return None
        return TextTemplate(text).safe_substitute(mapping)

    return RenderedTemplate(
        subject=fill(template.subject, values),
        body_text=fill(template.body_text, values),
        body_html=fill(template.body_html, escaped),
    )
