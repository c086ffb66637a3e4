"""Fixed pipeline layout and default tuning knobs."""

from __future__ import annotations

from enum import Enum


class Stage(str, Enum):
    """Pipeline stages. Every task type belongs to exactly one stage."""

    INTAKE = "intake"
    RESEARCH = "research"
    KB_BUILD = "kb_build"
    SITEMAP = "sitemap"
    COPYWRITE = "copywrite"
    IMAGE_GENERATE = "image_generate"
    IMAGE_STORE = "image_store"
    PUBLISH = "publish"


class WorkflowType(str, Enum):
    SITE_BUILD = "site_build"
    BLOG_BATCH = "blog_batch"
    SINGLE_PAGE = "single_page"


STAGE_ORDER: list[Stage] = [
    Stage.INTAKE,
    Stage.RESEARCH,
    Stage.KB_BUILD,
    Stage.SITEMAP,
    Stage.COPYWRITE,
    Stage.IMAGE_GENERATE,
    Stage.IMAGE_STORE,
    Stage.PUBLISH,
]

TERMINAL_STAGE: Stage = STAGE_ORDER[-1]

STAGE_LABELS: dict[Stage, str] = {
    Stage.INTAKE: "Intake",
    Stage.RESEARCH: "Research",
    Stage.KB_BUILD: "Knowledge Base",
    Stage.SITEMAP: "Sitemap",
    Stage.COPYWRITE: "Content",
    Stage.IMAGE_GENERATE: "Images",
    Stage.IMAGE_STORE: "Storage",
    Stage.PUBLISH: "Publish",
}


def stage_index(stage: Stage | str) -> int:
    """Position of ``stage`` in :data:`STAGE_ORDER`."""
    return STAGE_ORDER.index(Stage(stage))


ROOT_TASK_PRIORITY = 100
ROOT_TASK_TARGET = "intake_questionnaire"

DEFAULT_MAX_CONCURRENT_TASKS = 5
DEFAULT_TASK_MAX_RETRIES = 2
DEFAULT_STALE_AFTER_SECONDS = 300.0
DEFAULT_STALE_CRITICAL_COUNT = 2
DEFAULT_IMAGE_QA_ATTEMPTS = 3
