from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


class LocalImageStore:
    """Writes images below a base directory."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, name: str, mime_type: str) -> Path:
        extension = mimetypes.guess_extension(mime_type) or ".bin"
        safe = _UNSAFE_RE.sub("_", name).strip("._") or "image"
        return self.directory / f"{safe}{extension}"

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def save(self, name: str, data: bytes, mime_type: str = "image/png") -> str:
        path = self.path_for(name, mime_type)
        await asyncio.to_thread(self._write, path, data)
        logger.info(f"Stored image {name} at {path} ({len(data)} bytes)")
        return str(path)
