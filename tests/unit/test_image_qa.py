"""Tests for the dual-reviewer image QA loop."""

import pytest

from pagewright.cancellation import CancellationToken
from pagewright.errors import TaskCancelledError
from pagewright.imaging.qa import (
    NO_TEXT_REMINDER,
    TEXTLESS_INSTRUCTIONS,
    GeneratedImage,
    ImageQaLoop,
    ReviewVerdict,
    detect_text_defect,
    make_textless_prompt,
)

PROMPT = "A cozy bakery storefront with a sign reading FRESH BREAD"


class FakeGenerator:
    """Returns an image per entry of ``outcomes``: True, None or an exception."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.prompts = []

    async def generate(self, prompt, index):
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if not outcome:
            return None
        return GeneratedImage(base64="aW1hZ2U=", prompt=prompt)


class FakeReviewer:
    def __init__(self, *verdicts):
        self.verdicts = list(verdicts)
        self.calls = 0

    async def review(self, image, prompt, section_context):
        self.calls += 1
        verdict = self.verdicts.pop(0) if self.verdicts else ReviewVerdict(approved=True)
        if isinstance(verdict, Exception):
            raise verdict
        return verdict


class FakeRewriter:
    def __init__(self, result="A cozy bakery interior, warm light", error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def rewrite(self, prompt, feedback, fix_prompt, text_detected):
        self.calls.append(
            {
                "prompt": prompt,
                "feedback": feedback,
                "fix_prompt": fix_prompt,
                "text_detected": text_detected,
            }
        )
        if self.error:
            raise self.error
        return self.result


def _loop(generator, primary, secondary, rewriter=None, max_attempts=3):
    return ImageQaLoop(generator, primary, secondary, rewriter or FakeRewriter(), max_attempts)


TEXT_REJECTION = ReviewVerdict(
    approved=False,
    feedback="The sign has garbled text",
    fix_prompt="A cozy bakery storefront, no signs",
)


@pytest.mark.asyncio
async def test_textless_attempt_is_auto_approved_after_two_rejections():
    generator = FakeGenerator([True, True, True])
    primary = FakeReviewer(TEXT_REJECTION, ReviewVerdict(approved=False, feedback="Letters still visible"))
    secondary = FakeReviewer(
        ReviewVerdict(approved=False, feedback="Typography is unreadable"),
        ReviewVerdict(approved=True, feedback="Fine"),
    )
    rewriter = FakeRewriter()

    result = await _loop(generator, primary, secondary, rewriter).run(PROMPT, "Intro")

    assert result.success is True
    assert result.approved is True
    assert result.used_textless_fallback is True
    assert result.image.prompt == make_textless_prompt(PROMPT)
    assert primary.calls == 2
    assert secondary.calls == 2

    first, second, third = result.attempts
    assert first.prompt == PROMPT
    assert first.text_detected is True
    assert first.final_approved is False
    assert first.fix_prompt == "A cozy bakery storefront, no signs"

    assert rewriter.calls[0]["text_detected"] is True
    assert rewriter.calls[0]["fix_prompt"] == "A cozy bakery storefront, no signs"
    assert second.prompt.startswith("A cozy bakery interior, warm light")
    assert NO_TEXT_REMINDER in second.prompt
    assert second.final_approved is False

    assert third.used_textless is True
    assert third.final_approved is True
    assert third.primary_review is None
    assert third.secondary_review is None


@pytest.mark.asyncio
async def test_first_attempt_approved_by_both_reviewers():
    generator = FakeGenerator([True])
    rewriter = FakeRewriter()
    result = await _loop(generator, FakeReviewer(), FakeReviewer(), rewriter).run(PROMPT)

    assert result.success and result.approved
    assert result.used_textless_fallback is False
    assert len(result.attempts) == 1
    assert result.image.prompt == PROMPT
    assert rewriter.calls == []


@pytest.mark.asyncio
async def test_single_rejection_rejects_the_attempt():
    generator = FakeGenerator([True, True])
    primary = FakeReviewer(ReviewVerdict(approved=True), ReviewVerdict(approved=True))
    secondary = FakeReviewer(
        ReviewVerdict(approved=False, feedback="Too dark"), ReviewVerdict(approved=True)
    )

    result = await _loop(generator, primary, secondary).run(PROMPT)

    assert [a.final_approved for a in result.attempts] == [False, True]
    assert result.attempts[0].text_detected is False
    assert result.used_textless_fallback is False


@pytest.mark.asyncio
async def test_rewriter_failure_falls_back_to_fix_prompt():
    generator = FakeGenerator([True, True])
    primary = FakeReviewer(
        ReviewVerdict(approved=False, feedback="Too dark", fix_prompt="A bright bakery at noon")
    )
    rewriter = FakeRewriter(error=RuntimeError("rewriter offline"))

    result = await _loop(generator, primary, FakeReviewer(), rewriter).run(PROMPT)

    assert generator.prompts[1] == "A bright bakery at noon"
    assert result.approved is True


@pytest.mark.asyncio
async def test_fallback_prompt_without_fix_prompt_appends_feedback():
    generator = FakeGenerator([True, True])
    primary = FakeReviewer(ReviewVerdict(approved=False, feedback="Too dark"))
    rewriter = FakeRewriter(error=RuntimeError("rewriter offline"))

    await _loop(generator, primary, FakeReviewer(), rewriter).run(PROMPT)

    assert generator.prompts[1] == f"{PROMPT}. IMPORTANT: Primary reviewer: Too dark."


@pytest.mark.asyncio
async def test_standalone_textless_attempt_when_no_image_was_produced():
    generator = FakeGenerator([None, RuntimeError("generator 500"), None, True])
    primary = FakeReviewer()
    result = await _loop(generator, primary, FakeReviewer()).run(PROMPT)

    assert result.success is True
    assert result.used_textless_fallback is True
    assert len(result.attempts) == 4
    assert [a.image_produced for a in result.attempts] == [False, False, False, True]
    assert result.attempts[1].error == "generator 500"
    assert result.attempts[3].used_textless is True
    assert result.attempts[3].prompt == make_textless_prompt(PROMPT)
    assert primary.calls == 0


@pytest.mark.asyncio
async def test_total_failure_when_nothing_is_ever_generated():
    generator = FakeGenerator([None, None, None, None])
    result = await _loop(generator, FakeReviewer(), FakeReviewer()).run(PROMPT)

    assert result.success is False
    assert result.image is None
    assert len(result.attempts) == 4
    assert not any(a.final_approved for a in result.attempts)


@pytest.mark.asyncio
async def test_rejected_images_are_kept_when_textless_generation_fails():
    generator = FakeGenerator([True, True, None])
    primary = FakeReviewer(
        ReviewVerdict(approved=False, feedback="Wrong subject"),
        ReviewVerdict(approved=False, feedback="Still wrong"),
    )
    result = await _loop(generator, primary, FakeReviewer()).run(PROMPT)

    assert result.success is True
    assert result.approved is False
    assert result.used_textless_fallback is False
    assert result.image.prompt == result.attempts[1].prompt
    assert len(result.attempts) == 3


@pytest.mark.asyncio
async def test_reviewer_error_does_not_veto():
    generator = FakeGenerator([True])
    primary = FakeReviewer(RuntimeError("vision model timeout"))
    result = await _loop(generator, primary, FakeReviewer()).run(PROMPT)

    assert result.approved is True
    assert "Review unavailable" in result.attempts[0].primary_review.feedback


@pytest.mark.asyncio
async def test_cancelled_token_stops_the_loop():
    token = CancellationToken()
    token.cancel("run cancelled")
    with pytest.raises(TaskCancelledError):
        await _loop(FakeGenerator([True]), FakeReviewer(), FakeReviewer()).run(
            PROMPT, cancel=token
        )


@pytest.mark.asyncio
async def test_attempt_callback_sees_every_attempt():
    seen = []
    generator = FakeGenerator([None, True])
    await _loop(generator, FakeReviewer(), FakeReviewer()).run(
        PROMPT, on_attempt=seen.append
    )
    assert [a.attempt for a in seen] == [1, 2]


def test_attempt_records_are_immutable():
    generator_image = GeneratedImage(base64="eA==", prompt="x")
    assert generator_image.data_url == "data:image/png;base64,eA=="
    verdict = ReviewVerdict(approved=True)
    with pytest.raises(Exception):
        verdict.approved = False


def test_make_textless_prompt_strips_text_elements():
    textless = make_textless_prompt(PROMPT)
    subject = textless.split("\n\n")[0]
    assert "sign" not in subject.lower()
    assert "bakery storefront" in subject
    assert textless.endswith(TEXTLESS_INSTRUCTIONS)
    assert make_textless_prompt(textless) == textless


def test_make_textless_prompt_with_nothing_left():
    textless = make_textless_prompt("A banner with the company logo")
    assert textless.startswith("A professional marketing photograph.")


def test_detect_text_defect_only_counts_rejections():
    assert detect_text_defect([TEXT_REJECTION, ReviewVerdict(approved=True)])
    assert not detect_text_defect(
        [ReviewVerdict(approved=True, feedback="No text, looks great")]
    )
    assert not detect_text_defect([ReviewVerdict(approved=False, feedback="Too dark")])


@pytest.mark.parametrize(
    "feedback",
    [
        "No text visible, lighting is dull",
        "Image is free of text and logos but the bread looks burnt",
        "Without any visible lettering; the composition is cluttered",
    ],
)
def test_negated_text_mentions_are_not_text_defects(feedback):
    assert not detect_text_defect([ReviewVerdict(approved=False, feedback=feedback)])


def test_text_complaint_after_a_negation_still_counts():
    verdict = ReviewVerdict(
        approved=False, feedback="No logos, but the banner shows gibberish"
    )
    assert detect_text_defect([verdict])


def test_loop_needs_room_for_the_textless_attempt():
    with pytest.raises(ValueError):
        ImageQaLoop(FakeGenerator([]), FakeReviewer(), FakeReviewer(), FakeRewriter(), 1)
