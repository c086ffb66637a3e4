"""Image generation, review and storage."""

from .agents import AgentImageReviewer, AgentPromptRewriter
from .generator import HttpImageGenerator
from .qa import (
    GeneratedImage,
    ImageGenerator,
    ImageQaAttempt,
    ImageQaLoop,
    ImageQaResult,
    ImageReviewer,
    PromptRewriter,
    ReviewVerdict,
    detect_text_defect,
    make_textless_prompt,
)
from .store import LocalImageStore

__all__ = [
    "AgentImageReviewer",
    "AgentPromptRewriter",
    "HttpImageGenerator",
    "LocalImageStore",
    "GeneratedImage",
    "ImageGenerator",
    "ImageQaAttempt",
    "ImageQaLoop",
    "ImageQaResult",
    "ImageReviewer",
    "PromptRewriter",
    "ReviewVerdict",
    "detect_text_defect",
    "make_textless_prompt",
]
