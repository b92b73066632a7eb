"""
Longshot - Export Manager
Writes finished captures to OUTPUT_DIR.

Filenames follow <title-slug>_<host>_<YYYYMMDD-HHMMSS>.png. Files are never
overwritten: a name collision gets a numeric suffix.
"""

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from utils.error_handler import ErrorContext, ExportFailedError

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 60


def slugify(text: str, fallback: str = "capture") -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "-", text or "").strip("-").lower()
    slug = slug[:MAX_SLUG_LENGTH].strip("-")
    return slug or fallback


class ExportManager:
    """Delivers encoded PNG bytes to disk"""

    def __init__(self, output_dir: str = "data/captures"):
        self.output_dir = Path(output_dir)

    def build_filename(self, title: str, url: str, when: Optional[datetime] = None) -> str:
        host = urlparse(url or "").hostname or "local"
        host = re.sub(r"[^A-Za-z0-9.-]+", "-", host)
        stamp = (when or datetime.now()).strftime("%Y%m%d-%H%M%S")
        return f"{slugify(title)}_{host}_{stamp}.png"

    async def export(self, data: bytes, title: str, url: str) -> str:
        """
        Write the capture and return its path.

        Raises:
            ExportFailedError: the file could not be written
        """
        filename = self.build_filename(title, url)
        with ErrorContext(f"writing {self.output_dir / filename}", raise_as=ExportFailedError, catch=(OSError,)):
            path = await asyncio.to_thread(self._write, filename, data)

        logger.info(f"[ExportManager] Saved {path} ({len(data)} bytes)")
        return str(path)

    def _write(self, filename: str, data: bytes) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        stem, suffix = filename.rsplit(".", 1)
        candidate = self.output_dir / filename
        counter = 1
        while True:
            try:
                with open(candidate, "xb") as f:
                    f.write(data)
                return candidate
            except FileExistsError:
                candidate = self.output_dir / f"{stem}_{counter}.{suffix}"
                counter += 1
