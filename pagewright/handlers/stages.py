"""Handlers for the ``intake``, ``research`` and ``kb_build`` stages.

Each stage validates its input, calls one model-backed collaborator and
queues the next stage with the data it needs.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, cast

from ..cancellation import CancellationToken
from ..constants import Stage
from ..contracts import CreateTaskParams, TaskResult, WorkflowTask
from ..errors import ValidationError
from ..payloads import IntakeData, IntakeInput, KbBuildInput, ResearchInput, parse_task_input
from .agents import IntakeEnhancement, KnowledgeEntry, ResearchFindings

logger = logging.getLogger(__name__)

RESEARCH_TARGET = "deep_research"
KNOWLEDGE_BASE_TARGET = "knowledge_base"
SITEMAP_TARGET = "site_structure"


class IntakeEnhancer(Protocol):
    async def enhance(self, questionnaire: IntakeData) -> IntakeEnhancement: ...


class Researcher(Protocol):
    async def research(self, subject: Mapping[str, Any]) -> ResearchFindings: ...


class KnowledgeBuilder(Protocol):
    async def build(
        self, research: Dict[str, Any], intake: Dict[str, Any]
    ) -> List[KnowledgeEntry]: ...


class IntakeHandler:
    """Accepts the questionnaire and queues research for the business.

    Without a questionnaire the task waits for the user. Enhancement is
    best effort: when the model fails the questionnaire is used as given.
    """

    def __init__(self, enhancer: Optional[IntakeEnhancer] = None) -> None:
        self.enhancer = enhancer

    async def execute(self, task: WorkflowTask, cancel: CancellationToken) -> TaskResult:
        try:
            payload = cast(IntakeInput, parse_task_input(Stage.INTAKE, task.input))
        except ValidationError as exc:
            return TaskResult.blocked(str(exc))
        if payload.questionnaire is None:
            return TaskResult.blocked("Intake questionnaire required")

        profile = payload.questionnaire
        questions: List[str] = []
        if self.enhancer is not None:
            try:
                enhanced = await self.enhancer.enhance(profile)
            except Exception as exc:
                logger.warning(f"Intake enhancement failed, using questionnaire as given: {exc}")
            else:
                questions = enhanced.suggested_questions
                profile = IntakeData.model_validate(
                    {
                        **profile.model_dump(),
                        **enhanced.model_dump(
                            exclude={"suggested_questions"}, exclude_defaults=True
                        ),
                    }
                )
        cancel.raise_if_cancelled()

        research = CreateTaskParams(
            task_type=Stage.RESEARCH,
            target_entity=RESEARCH_TARGET,
            input={
                "industry": profile.industry,
                "city": profile.city,
                "state": profile.state,
                "business_name": profile.business_name,
                "services": profile.services,
            },
            depends_on=[task.id],
        )
        return TaskResult.ok(
            {"intake": profile.model_dump(), "suggested_questions": questions}, [research]
        )


class ResearchHandler:
    def __init__(self, researcher: Researcher) -> None:
        self.researcher = researcher

    async def execute(self, task: WorkflowTask, cancel: CancellationToken) -> TaskResult:
        try:
            payload = cast(ResearchInput, parse_task_input(Stage.RESEARCH, task.input))
        except ValidationError as exc:
            return TaskResult.blocked(str(exc))

        subject = payload.model_dump()
        findings = await self.researcher.research(subject)
        cancel.raise_if_cancelled()
        logger.info(f"Research for task {task.id} found {len(findings.keywords)} keywords")

        research = findings.model_dump()
        knowledge = CreateTaskParams(
            task_type=Stage.KB_BUILD,
            target_entity=KNOWLEDGE_BASE_TARGET,
            input={"research": research, "intake": subject},
            depends_on=[task.id],
        )
        return TaskResult.ok({"research": research}, [knowledge])


class KbBuildHandler:
    """Turns research and intake data into knowledge base entries."""

    def __init__(self, builder: KnowledgeBuilder) -> None:
        self.builder = builder

    async def execute(self, task: WorkflowTask, cancel: CancellationToken) -> TaskResult:
        try:
            payload = cast(KbBuildInput, parse_task_input(Stage.KB_BUILD, task.input))
        except ValidationError as exc:
            return TaskResult.blocked(str(exc))
        if not payload.research and not payload.intake:
            return TaskResult.blocked(
                "No research or intake data to build the knowledge base from"
            )

        entries = await self.builder.build(payload.research, payload.intake)
        if not entries:
            return TaskResult.fail("No knowledge base entries were produced")
        cancel.raise_if_cancelled()

        categories = sorted({entry.category.value for entry in entries})
        logger.info(
            f"Built {len(entries)} knowledge base entries for task {task.id} "
            f"across {', '.join(categories)}"
        )
        services = payload.intake.get("services") or payload.research.get("services") or []
        sitemap = CreateTaskParams(
            task_type=Stage.SITEMAP,
            target_entity=SITEMAP_TARGET,
            input={
                "business_name": payload.intake.get("business_name"),
                "services": list(services),
                "kb_entries_count": len(entries),
            },
            depends_on=[task.id],
        )
        return TaskResult.ok(
            {
                "entries": [entry.model_dump(mode="json") for entry in entries],
                "entries_created": len(entries),
                "categories": categories,
            },
            [sitemap],
        )
