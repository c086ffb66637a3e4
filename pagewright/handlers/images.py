"""Handlers for the ``image_generate`` and ``image_store`` stages."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import cast

from ..cancellation import CancellationToken
from ..constants import Stage
from ..contracts import CreateTaskParams, TaskResult, WorkflowTask
from ..errors import ValidationError
from ..imaging.qa import ImageQaLoop
from ..imaging.store import LocalImageStore
from ..payloads import ImageGenerateInput, ImageStoreInput, parse_task_input

logger = logging.getLogger(__name__)

ALT_TEXT_LENGTH = 125


class ImageGenerateHandler:
    """Runs the QA loop for one image slot and queues its storage task."""

    def __init__(self, loop: ImageQaLoop) -> None:
        self.loop = loop

    async def execute(self, task: WorkflowTask, cancel: CancellationToken) -> TaskResult:
        try:
            payload = cast(
                ImageGenerateInput, parse_task_input(Stage.IMAGE_GENERATE, task.input)
            )
        except ValidationError as exc:
            # A missing prompt has to come from the user.
            return TaskResult.blocked(str(exc))

        result = await self.loop.run(
            payload.prompt,
            section_context=payload.section_context,
            index=payload.image_index,
            cancel=cancel,
        )
        if not result.success or result.image is None:
            return TaskResult.fail("All image generation attempts failed")

        image = result.image
        output = {
            "image": {
                "base64": image.base64,
                "mime_type": image.mime_type,
                "prompt": image.prompt,
            },
            "attempts": [a.model_dump(mode="json") for a in result.attempts],
            "used_textless_fallback": result.used_textless_fallback,
            "approved": result.approved,
        }
        store = CreateTaskParams(
            task_type=Stage.IMAGE_STORE,
            target_entity=f"{payload.page_slug or 'page'}_image_{payload.image_index}",
            input={
                "image_base64": image.base64,
                "image_mime_type": image.mime_type,
                "alt_text": payload.prompt[:ALT_TEXT_LENGTH],
                "page_slug": payload.page_slug,
                "image_index": payload.image_index,
            },
            depends_on=[task.id],
        )
        return TaskResult.ok(output, [store])


class ImageStoreHandler:
    def __init__(self, store: LocalImageStore) -> None:
        self.store = store

    async def execute(self, task: WorkflowTask, cancel: CancellationToken) -> TaskResult:
        try:
            payload = cast(ImageStoreInput, parse_task_input(Stage.IMAGE_STORE, task.input))
        except ValidationError as exc:
            return TaskResult.blocked(str(exc))

        encoded = payload.image_base64
        if encoded.startswith("data:") and "," in encoded:
            encoded = encoded.split(",", 1)[1]
        try:
            data = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            return TaskResult.fail(f"Invalid image data: {exc}")

        cancel.raise_if_cancelled()
        name = task.target_entity or f"{payload.page_slug or 'page'}_image_{payload.image_index}"
        path = await self.store.save(name, data, payload.image_mime_type)
        return TaskResult.ok(
            {
                "path": path,
                "alt_text": payload.alt_text,
                "mime_type": payload.image_mime_type,
                "size": len(data),
            }
        )
