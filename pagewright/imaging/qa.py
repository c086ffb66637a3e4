"""Multi-attempt, dual-reviewer quality loop for one generated image.

Attempt 1 uses the prompt as given. Middle attempts use a rewritten prompt
informed by the previous rejection. The last attempt uses the deterministic
textless rewrite and skips review. If no attempt produced an image at all, a
single standalone textless attempt is made before giving up.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from ..cancellation import CancellationToken
from ..constants import DEFAULT_IMAGE_QA_ATTEMPTS

logger = logging.getLogger(__name__)


class GeneratedImage(BaseModel):
    base64: str
    mime_type: str = "image/png"
    prompt: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


class ReviewVerdict(BaseModel):
    """One reviewer's opinion of one image."""

    model_config = ConfigDict(frozen=True)

    approved: bool
    feedback: str = ""
    fix_prompt: Optional[str] = None


class ImageQaAttempt(BaseModel):
    """Audit record of a single attempt. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    attempt: int
    prompt: str
    image_produced: bool
    primary_review: Optional[ReviewVerdict] = None
    secondary_review: Optional[ReviewVerdict] = None
    text_detected: bool = False
    fix_prompt: Optional[str] = None
    used_textless: bool = False
    final_approved: bool = False
    error: Optional[str] = None


class ImageQaResult(BaseModel):
    success: bool
    image: Optional[GeneratedImage] = None
    attempts: List[ImageQaAttempt]
    used_textless_fallback: bool = False
    approved: bool = False


class ImageGenerator(Protocol):
    async def generate(self, prompt: str, index: int) -> Optional[GeneratedImage]:
        """Return one image for ``prompt`` or ``None`` when nothing came back."""


class ImageReviewer(Protocol):
    async def review(
        self, image: GeneratedImage, prompt: str, section_context: str
    ) -> ReviewVerdict: ...


class PromptRewriter(Protocol):
    async def rewrite(
        self,
        prompt: str,
        feedback: str,
        fix_prompt: Optional[str],
        text_detected: bool,
    ) -> str: ...


AttemptCallback = Callable[[ImageQaAttempt], None]

# ---------------------------------------------------------------------------
# Textless rewrite

TEXTLESS_INSTRUCTIONS = (
    "STRICT REQUIREMENTS: The image must contain absolutely no text of any kind. "
    "No letters, numbers, words, signage, labels, banners, logos, watermarks, "
    "captions or typography anywhere in the scene. Every surface that could "
    "carry writing must be blank or purely pictorial."
)

_TEXT_TERMS = (
    r"signs?",
    r"signage",
    r"labels?",
    r"labell?ed",
    r"banners?",
    r"logos?",
    r"text",
    r"texts",
    r"textual",
    r"lettering",
    r"letters?",
    r"typography",
    r"fonts?",
    r"words?",
    r"captions?",
    r"headlines?",
    r"slogans?",
    r"writing",
    r"written",
    r"posters?",
    r"billboards?",
    r"storefront name",
    r"brand name",
)
_TEXT_TERM_RE = re.compile(r"\b(?:%s)\b" % "|".join(_TEXT_TERMS), re.IGNORECASE)
_CLAUSE_SPLIT_RE = re.compile(r"(?<=[.;,!?])\s+|\s+(?:with|featuring|showing)\s+", re.IGNORECASE)

_DEFECT_TERMS = _TEXT_TERMS + (r"spelling", r"misspell\w*", r"gibberish", r"legible", r"illegible")
_DEFECT_RE = re.compile(r"\b(?:%s)\b" % "|".join(_DEFECT_TERMS), re.IGNORECASE)
_DEFECT_TERM = r"(?:%s)" % "|".join(_DEFECT_TERMS)
# "no text or logos", "without any visible lettering"
_NEGATED_DEFECT_RE = re.compile(
    r"\b(?:no|without|free of|zero|lacks?)\s+"
    r"(?:(?:any|visible|legible|readable|discernible)\s+)*"
    rf"{_DEFECT_TERM}(?:\s*(?:,\s*(?:or\s+|and\s+)?|or\s+|and\s+|/\s*){_DEFECT_TERM})*\b",
    re.IGNORECASE,
)


def make_textless_prompt(prompt: str) -> str:
    """Deterministically strip text-bearing elements from ``prompt``.

    Clauses mentioning signage, labels, banners, logos or text are dropped and
    an instruction block banning typography is appended. Applying it twice
    gives the same result.
    """
    base = prompt.split(TEXTLESS_INSTRUCTIONS, 1)[0]
    clauses = [c.strip(" .;,!?\n") for c in _CLAUSE_SPLIT_RE.split(base)]
    kept = [c for c in clauses if c and not _TEXT_TERM_RE.search(c)]
    subject = ", ".join(kept) if kept else "A professional marketing photograph"
    return f"{subject}.\n\n{TEXTLESS_INSTRUCTIONS}"


def detect_text_defect(verdicts: Sequence[Optional[ReviewVerdict]]) -> bool:
    """Whether any rejecting reviewer complained about visible text.

    Negated mentions such as "no text visible" do not count.
    """
    for verdict in verdicts:
        if verdict is None or verdict.approved:
            continue
        feedback = _NEGATED_DEFECT_RE.sub(" ", verdict.feedback or "")
        if _DEFECT_RE.search(feedback):
            return True
    return False


def combine_feedback(
    prompt: str, primary: ReviewVerdict, secondary: ReviewVerdict
) -> Tuple[str, str]:
    """Merge rejecting reviewers' feedback and pick a fix prompt.

    The primary reviewer's fix prompt wins; without one the prompt itself is
    reused with the feedback appended.
    """
    feedback = ""
    fix_prompt = ""
    if not primary.approved:
        if primary.feedback:
            feedback += f"Primary reviewer: {primary.feedback}. "
        fix_prompt = primary.fix_prompt or ""
    if not secondary.approved:
        if secondary.feedback:
            feedback += f"Secondary reviewer: {secondary.feedback}. "
        if not fix_prompt and secondary.fix_prompt:
            fix_prompt = secondary.fix_prompt
    feedback = feedback.strip()
    if not fix_prompt:
        fix_prompt = f"{prompt}. IMPORTANT: {feedback}" if feedback else prompt
    return feedback, fix_prompt


NO_TEXT_REMINDER = "Absolutely no text, letters, signage or logos in the image."


class ImageQaLoop:
    def __init__(
        self,
        generator: ImageGenerator,
        primary_reviewer: ImageReviewer,
        secondary_reviewer: ImageReviewer,
        rewriter: PromptRewriter,
        max_attempts: int = DEFAULT_IMAGE_QA_ATTEMPTS,
    ) -> None:
        if max_attempts < 2:
            raise ValueError("max_attempts must be at least 2")
        self.generator = generator
        self.primary_reviewer = primary_reviewer
        self.secondary_reviewer = secondary_reviewer
        self.rewriter = rewriter
        self.max_attempts = max_attempts

    async def run(
        self,
        prompt: str,
        section_context: str = "Blog section",
        index: int = 0,
        cancel: Optional[CancellationToken] = None,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> ImageQaResult:
        attempts: List[ImageQaAttempt] = []
        last_image: Optional[GeneratedImage] = None

        def record(attempt: ImageQaAttempt) -> None:
            attempts.append(attempt)
            if on_attempt is not None:
                on_attempt(attempt)

        for number in range(1, self.max_attempts + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            textless = number == self.max_attempts
            if number == 1:
                attempt_prompt = prompt
            elif textless:
                logger.info(
                    f"Image {index}: attempts 1-{number - 1} unresolved, switching to textless prompt"
                )
                attempt_prompt = make_textless_prompt(prompt)
            else:
                attempt_prompt = await self._next_prompt(prompt, attempts[-1])

            image, error = await self._generate(attempt_prompt, index)
            if image is None:
                record(
                    ImageQaAttempt(
                        attempt=number,
                        prompt=attempt_prompt,
                        image_produced=False,
                        used_textless=textless,
                        error=error,
                    )
                )
                continue

            if textless:
                record(
                    ImageQaAttempt(
                        attempt=number,
                        prompt=attempt_prompt,
                        image_produced=True,
                        used_textless=True,
                        final_approved=True,
                    )
                )
                return ImageQaResult(
                    success=True,
                    image=image,
                    attempts=attempts,
                    used_textless_fallback=True,
                    approved=True,
                )

            primary, secondary = await asyncio.gather(
                self._review(self.primary_reviewer, image, attempt_prompt, section_context),
                self._review(self.secondary_reviewer, image, attempt_prompt, section_context),
            )
            approved = primary.approved and secondary.approved
            fix_prompt = None
            if not approved:
                _, fix_prompt = combine_feedback(attempt_prompt, primary, secondary)
            record(
                ImageQaAttempt(
                    attempt=number,
                    prompt=attempt_prompt,
                    image_produced=True,
                    primary_review=primary,
                    secondary_review=secondary,
                    text_detected=detect_text_defect([primary, secondary]),
                    fix_prompt=fix_prompt,
                    final_approved=approved,
                )
            )
            logger.info(
                f"Image {index} attempt {number}: "
                f"primary {'approved' if primary.approved else 'rejected'}, "
                f"secondary {'approved' if secondary.approved else 'rejected'}"
            )
            if approved:
                return ImageQaResult(
                    success=True, image=image, attempts=attempts, approved=True
                )
            last_image = image

        if last_image is not None:
            logger.warning(
                f"Image {index}: no attempt approved, keeping last rejected image"
            )
            return ImageQaResult(
                success=True, image=last_image, attempts=attempts, approved=False
            )

        if cancel is not None:
            cancel.raise_if_cancelled()
        fallback_prompt = make_textless_prompt(prompt)
        logger.warning(f"Image {index}: no image produced, trying standalone textless attempt")
        image, error = await self._generate(fallback_prompt, index)
        record(
            ImageQaAttempt(
                attempt=len(attempts) + 1,
                prompt=fallback_prompt,
                image_produced=image is not None,
                used_textless=True,
                final_approved=image is not None,
                error=error,
            )
        )
        if image is None:
            logger.error(f"Image {index}: all generation attempts failed")
            return ImageQaResult(success=False, attempts=attempts)
        return ImageQaResult(
            success=True,
            image=image,
            attempts=attempts,
            used_textless_fallback=True,
            approved=True,
        )

    # ------------------------------------------------------------------
    async def _generate(
        self, prompt: str, index: int
    ) -> Tuple[Optional[GeneratedImage], Optional[str]]:
        try:
            image = await self.generator.generate(prompt, index)
        except Exception as exc:
            logger.warning(f"Image {index} generation failed: {exc}")
            return None, str(exc) or type(exc).__name__
        if image is None:
            return None, "No image returned"
        return image, None

    async def _review(
        self,
        reviewer: ImageReviewer,
        image: GeneratedImage,
        prompt: str,
        section_context: str,
    ) -> ReviewVerdict:
        try:
            return await reviewer.review(image, prompt, section_context)
        except Exception as exc:
            # An unavailable reviewer does not veto the image.
            logger.warning(f"Image review failed, treating as approved: {exc}")
            return ReviewVerdict(approved=True, feedback=f"Review unavailable: {exc}")

    async def _next_prompt(self, original: str, previous: ImageQaAttempt) -> str:
        if not previous.image_produced:
            return previous.prompt
        primary = previous.primary_review or ReviewVerdict(approved=True)
        secondary = previous.secondary_review or ReviewVerdict(approved=True)
        feedback, fix_prompt = combine_feedback(original, primary, secondary)
        try:
            rewritten = await self.rewriter.rewrite(
                original, feedback, previous.fix_prompt, previous.text_detected
            )
        except Exception as exc:
            logger.warning(f"Prompt rewrite failed, using reviewer fix prompt: {exc}")
            rewritten = ""
        rewritten = rewritten.strip() or previous.fix_prompt or fix_prompt
        if previous.text_detected and NO_TEXT_REMINDER not in rewritten:
            rewritten = f"{rewritten} {NO_TEXT_REMINDER}"
        return rewritten
