"""pydantic-ai backed image reviewers and prompt rewriter."""

from __future__ import annotations

import base64
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic_ai import Agent, BinaryContent
from pydantic_ai.models import Model

from ..limiter import BaseRateLimiter
from .qa import GeneratedImage, ReviewVerdict

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIMARY_REVIEW_FOCUS = """\
You are a meticulous art director reviewing images for a small-business marketing site.
Reject any image with visible text, letters, signage or logos, since generated
typography is almost always garbled. Also reject distorted people or hands,
wrong subjects and anything unprofessional."""

SECONDARY_REVIEW_FOCUS = """\
You are a professional image quality reviewer for a business blog.
Judge whether the image accurately represents the prompt, whether its quality is
good enough for marketing, and whether it would enhance the blog section."""

REVIEW_INSTRUCTIONS = """\
Set `approved` to false if the image should be remade. Always explain your
judgement in `feedback`. When rejecting, put a complete replacement image prompt
in `fix_prompt`."""

REWRITE_SYSTEM_PROMPT = """\
You are an expert image prompt engineer. Rewrite image prompts so the next
generation fixes the problems a reviewer reported. Return only the new prompt."""


class LimitedAgent:
    """Lazily built agent whose runs go through an optional rate limiter."""

    def __init__(
        self,
        model: Model | str,
        output_type: Any,
        system_prompt: str,
        limiter: Optional[BaseRateLimiter] = None,
    ) -> None:
        self._model = model
        self._output_type = output_type
        self._system_prompt = system_prompt
        self._agent: Agent | None = None
        self.limiter = limiter

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            self._agent = Agent(
                self._model,
                output_type=self._output_type,
                system_prompt=self._system_prompt,
            )
        return self._agent

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.limiter is None:
            return await operation()
        return await self.limiter.execute(operation)


class AgentImageReviewer(LimitedAgent):
    """Reviews an image with a multimodal model and returns a structured verdict."""

    def __init__(
        self,
        model: Model | str,
        focus: str = SECONDARY_REVIEW_FOCUS,
        limiter: Optional[BaseRateLimiter] = None,
    ) -> None:
        super().__init__(
            model,
            output_type=ReviewVerdict,
            system_prompt=f"{focus}\n\n{REVIEW_INSTRUCTIONS}",
            limiter=limiter,
        )

    async def review(
        self, image: GeneratedImage, prompt: str, section_context: str
    ) -> ReviewVerdict:
        content = [
            f"ORIGINAL IMAGE PROMPT: {prompt}\nBLOG SECTION: {section_context}",
            BinaryContent(data=base64.b64decode(image.base64), media_type=image.mime_type),
        ]

        async def _run() -> ReviewVerdict:
            result = await self.agent.run(content)
            return result.output

        verdict = await self._call(_run)
        logger.debug(f"Review verdict: approved={verdict.approved} feedback={verdict.feedback!r}")
        return verdict


class AgentPromptRewriter(LimitedAgent):
    def __init__(self, model: Model | str, limiter: Optional[BaseRateLimiter] = None) -> None:
        super().__init__(
            model, output_type=str, system_prompt=REWRITE_SYSTEM_PROMPT, limiter=limiter
        )

    async def rewrite(
        self,
        prompt: str,
        feedback: str,
        fix_prompt: Optional[str],
        text_detected: bool,
    ) -> str:
        lines = [f"Original prompt: {prompt}", f"Reviewer feedback: {feedback or 'none'}"]
        if fix_prompt:
            lines.append(f"Reviewer suggested prompt: {fix_prompt}")
        if text_detected:
            lines.append(
                "The previous image contained visible text. The new prompt must "
                "explicitly forbid any text, letters, numbers, signage, labels, "
                "banners and logos."
            )

        async def _run() -> str:
            result = await self.agent.run("\n".join(lines))
            return result.output

        return (await self._call(_run)).strip()
