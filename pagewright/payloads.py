"""Typed task payloads, keyed by task type.

The dispatcher treats ``WorkflowTask.input``/``output`` as opaque dictionaries.
Handlers call :func:`parse_task_input` at their boundary to get the typed
variant for their task type.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .constants import Stage
from .errors import ValidationError


class TaskPayload(BaseModel):
    """Base for all task inputs. Unknown keys are kept for the handler."""

    model_config = ConfigDict(extra="allow")


class IntakeData(BaseModel):
    business_name: str
    industry: str
    city: str
    state: str
    services: List[str] = Field(default_factory=list)
    target_audience: Optional[str] = None
    competitors: List[str] = Field(default_factory=list)
    unique_value: Optional[str] = None
    goals: List[str] = Field(default_factory=list)
    additional_info: Optional[str] = None


class IntakeInput(TaskPayload):
    questionnaire: Optional[IntakeData] = None


class ResearchInput(TaskPayload):
    industry: str
    city: Optional[str] = None
    state: Optional[str] = None
    business_name: Optional[str] = None
    services: List[str] = Field(default_factory=list)


class KbBuildInput(TaskPayload):
    research: Dict[str, Any] = Field(default_factory=dict)
    intake: Dict[str, Any] = Field(default_factory=dict)


class SitemapInput(TaskPayload):
    business_name: Optional[str] = None
    services: List[str] = Field(default_factory=list)


class CopywriteInput(TaskPayload):
    page_slug: str
    page_title: Optional[str] = None
    blueprint: Dict[str, Any] = Field(default_factory=dict)
    knowledge_context: Optional[str] = None


class ImageGenerateInput(TaskPayload):
    prompt: str = Field(min_length=1)
    section_context: str = "Blog section"
    image_index: int = 0
    page_slug: Optional[str] = None


class ImageStoreInput(TaskPayload):
    image_base64: str = Field(min_length=1)
    image_mime_type: str = "image/png"
    alt_text: Optional[str] = None
    page_slug: Optional[str] = None
    image_index: int = 0


class PublishInput(TaskPayload):
    page_slug: Optional[str] = None
    html: Optional[str] = None


TASK_INPUT_MODELS: Dict[Stage, Type[TaskPayload]] = {
    Stage.INTAKE: IntakeInput,
    Stage.RESEARCH: ResearchInput,
    Stage.KB_BUILD: KbBuildInput,
    Stage.SITEMAP: SitemapInput,
    Stage.COPYWRITE: CopywriteInput,
    Stage.IMAGE_GENERATE: ImageGenerateInput,
    Stage.IMAGE_STORE: ImageStoreInput,
    Stage.PUBLISH: PublishInput,
}


def parse_task_input(task_type: Stage | str, data: Dict[str, Any] | None) -> TaskPayload:
    """Validate ``data`` against the input model registered for ``task_type``."""
    model = TASK_INPUT_MODELS[Stage(task_type)]
    try:
        return model.model_validate(data or {})
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Invalid input for task type '{Stage(task_type).value}': {exc}"
        ) from exc


__all__ = [
    "TaskPayload",
    "IntakeData",
    "IntakeInput",
    "ResearchInput",
    "KbBuildInput",
    "SitemapInput",
    "CopywriteInput",
    "ImageGenerateInput",
    "ImageStoreInput",
    "PublishInput",
    "TASK_INPUT_MODELS",
    "parse_task_input",
]
