"""Concrete stage handlers and the default registry."""

from __future__ import annotations

from typing import Optional

from ..config import PagewrightConfig
from ..constants import Stage
from ..imaging.agents import (
    PRIMARY_REVIEW_FOCUS,
    SECONDARY_REVIEW_FOCUS,
    AgentImageReviewer,
    AgentPromptRewriter,
)
from ..imaging.generator import HttpImageGenerator
from ..imaging.qa import ImageQaLoop
from ..imaging.store import LocalImageStore
from ..limiter import BaseRateLimiter, RateLimiter
from ..registry import HandlerRegistry
from .agents import AgentIntakeEnhancer, AgentKnowledgeBuilder, AgentResearcher
from .images import ImageGenerateHandler, ImageStoreHandler
from .stages import IntakeHandler, KbBuildHandler, ResearchHandler


def build_default_registry(
    config: PagewrightConfig, limiter: Optional[BaseRateLimiter] = None
) -> HandlerRegistry:
    """Registry with the built-in stage handlers wired to configured collaborators.

    All external calls share one limiter. Models are only contacted when a
    handler runs, so building the registry needs no credentials.
    """
    limiter = limiter or RateLimiter(config.rate_limiter)
    stages = config.stages
    images = config.images
    loop = ImageQaLoop(
        generator=HttpImageGenerator.from_env(
            images.generator_base_url,
            images.generator_api_key_env,
            model=images.generator_model,
            size=images.image_size,
            limiter=limiter,
        ),
        primary_reviewer=AgentImageReviewer(
            images.primary_reviewer_model, focus=PRIMARY_REVIEW_FOCUS, limiter=limiter
        ),
        secondary_reviewer=AgentImageReviewer(
            images.secondary_reviewer_model, focus=SECONDARY_REVIEW_FOCUS, limiter=limiter
        ),
        rewriter=AgentPromptRewriter(images.rewriter_model, limiter=limiter),
        max_attempts=images.max_attempts,
    )
    enhancer = (
        AgentIntakeEnhancer(stages.conductor_model, limiter=limiter)
        if stages.enhance_intake
        else None
    )

    registry = HandlerRegistry()
    registry.register(Stage.INTAKE, IntakeHandler(enhancer))
    registry.register(
        Stage.RESEARCH, ResearchHandler(AgentResearcher(stages.conductor_model, limiter=limiter))
    )
    registry.register(
        Stage.KB_BUILD,
        KbBuildHandler(AgentKnowledgeBuilder(stages.conductor_model, limiter=limiter)),
    )
    registry.register(Stage.IMAGE_GENERATE, ImageGenerateHandler(loop))
    registry.register(Stage.IMAGE_STORE, ImageStoreHandler(LocalImageStore(images.storage_dir)))
    return registry


__all__ = [
    "ImageGenerateHandler",
    "ImageStoreHandler",
    "IntakeHandler",
    "KbBuildHandler",
    "ResearchHandler",
    "build_default_registry",
]
