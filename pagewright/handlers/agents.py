"""pydantic-ai backed collaborators for the intake, research and kb_build stages."""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field
from pydantic_ai.models import Model

from ..imaging.agents import LimitedAgent
from ..limiter import BaseRateLimiter
from ..payloads import IntakeData

logger = logging.getLogger(__name__)

INTAKE_SYSTEM_PROMPT = """\
You are a business analyst gathering complete information for a website project.
Standardise the industry name, infer obvious missing details (for example the
cities a local trade serves) and keep everything the client already said.
Only list suggested questions when critical information is missing."""

RESEARCH_SYSTEM_PROMPT = """\
You are a market researcher preparing a brief for the writers of a small-business
website. Describe the industry in the client's location: the services customers
look for, typical competitors, search terms people use and local facts worth
mentioning. Do not invent facts about the client itself."""

KNOWLEDGE_SYSTEM_PROMPT = """\
You are a knowledge base architect. Turn business intake and research data into
self-contained entries a content writer can rely on. Each entry covers one fact
in two to four sentences. Rate confidence from 0 to 100 by how well the sources
support it and name the source: intake, research or inference."""


class IntakeEnhancement(IntakeData):
    suggested_questions: List[str] = Field(default_factory=list)


class ResearchFindings(BaseModel):
    summary: str
    services: List[str] = Field(default_factory=list)
    competitors: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    local_facts: List[str] = Field(default_factory=list)


class KnowledgeCategory(str, Enum):
    SERVICES = "services"
    USPS = "usps"
    FACTS = "facts"
    LOCATIONS = "locations"
    CERTIFICATIONS = "certifications"
    TEAM = "team"
    FAQS = "faqs"
    TESTIMONIALS = "testimonials"


class KnowledgeEntry(BaseModel):
    category: KnowledgeCategory
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    confidence: int = Field(default=80, ge=0, le=100)
    source: str = "inference"


def _as_json(data: Mapping[str, Any]) -> str:
    return json.dumps(dict(data), indent=2, default=str) if data else "Not provided"


class AgentIntakeEnhancer(LimitedAgent):
    def __init__(self, model: Model | str, limiter: Optional[BaseRateLimiter] = None) -> None:
        super().__init__(
            model,
            output_type=IntakeEnhancement,
            system_prompt=INTAKE_SYSTEM_PROMPT,
            limiter=limiter,
        )

    async def enhance(self, questionnaire: IntakeData) -> IntakeEnhancement:
        prompt = f"CURRENT INTAKE DATA:\n{_as_json(questionnaire.model_dump())}"

        async def _run() -> IntakeEnhancement:
            result = await self.agent.run(prompt)
            return result.output

        return await self._call(_run)


class AgentResearcher(LimitedAgent):
    def __init__(self, model: Model | str, limiter: Optional[BaseRateLimiter] = None) -> None:
        super().__init__(
            model,
            output_type=ResearchFindings,
            system_prompt=RESEARCH_SYSTEM_PROMPT,
            limiter=limiter,
        )

    async def research(self, subject: Mapping[str, Any]) -> ResearchFindings:
        prompt = f"BUSINESS:\n{_as_json(subject)}"

        async def _run() -> ResearchFindings:
            result = await self.agent.run(prompt)
            return result.output

        findings = await self._call(_run)
        logger.debug(
            f"Research for {subject.get('industry')}: {len(findings.keywords)} keywords, "
            f"{len(findings.competitors)} competitors"
        )
        return findings


class AgentKnowledgeBuilder(LimitedAgent):
    def __init__(self, model: Model | str, limiter: Optional[BaseRateLimiter] = None) -> None:
        super().__init__(
            model,
            output_type=List[KnowledgeEntry],
            system_prompt=KNOWLEDGE_SYSTEM_PROMPT,
            limiter=limiter,
        )

    async def build(
        self, research: Dict[str, Any], intake: Dict[str, Any]
    ) -> List[KnowledgeEntry]:
        prompt = (
            f"INTAKE DATA:\n{_as_json(intake)}\n\n"
            f"RESEARCH DATA:\n{_as_json(research)}\n\n"
            "Create 15-25 entries covering every category the data supports."
        )

        async def _run() -> List[KnowledgeEntry]:
            result = await self.agent.run(prompt)
            return result.output

        return await self._call(_run)
