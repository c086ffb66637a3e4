"""HTTP client for OpenAI-compatible image generation endpoints."""

from __future__ import annotations

import logging
import os
from typing import Optional

import httpx

from ..limiter import BaseRateLimiter
from .qa import GeneratedImage

logger = logging.getLogger(__name__)

STYLE_TEMPLATE = """\
Create a high-quality, photorealistic image for a professional blog post.

IMAGE REQUIREMENTS:
- Style: Professional marketing photography
- Quality: High resolution, sharp details
- Composition: Well-balanced, visually appealing
- Subject: {prompt}"""


class HttpImageGenerator:
    """Calls ``POST {base_url}/images/generations`` and returns the first image.

    Every request goes through ``limiter`` when one is given, so 429 and 5xx
    responses are retried there with backoff.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "gpt-image-1",
        size: str = "1536x1024",
        limiter: Optional[BaseRateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.size = size
        self.limiter = limiter
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_env(
        cls, base_url: str, api_key_env: str, **kwargs
    ) -> "HttpImageGenerator":
        return cls(base_url, api_key=os.getenv(api_key_env), **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, prompt: str) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        response = await self._client.post(
            f"{self.base_url}/images/generations",
            json={
                "model": self.model,
                "prompt": STYLE_TEMPLATE.format(prompt=prompt),
                "n": 1,
                "size": self.size,
            },
            headers=headers,
        )
        response.raise_for_status()
        return response.json()

    async def generate(self, prompt: str, index: int) -> Optional[GeneratedImage]:
        logger.info(f"Generating image {index} with {self.model}")
        if self.limiter is not None:
            body = await self.limiter.execute(lambda: self._request(prompt))
        else:
            body = await self._request(prompt)

        for item in body.get("data") or []:
            data = item.get("b64_json")
            if data:
                return GeneratedImage(
                    base64=data,
                    mime_type=item.get("mime_type", "image/png"),
                    prompt=prompt,
                )
        logger.warning(f"No image data in response for image {index}")
        return None
