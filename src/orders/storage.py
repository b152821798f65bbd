"""Payment proof storage: images on local disk, served by the HTTP API."""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from datetime import datetime, timezone
from pathlib import Path

from config import CFG


logger = logging.getLogger(__name__)

PROOFS_SUBDIR = "payment_proofs"
_SAFE_FILE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class ProofStorage:
    def __init__(self, media_dir: str | None = None, public_base_url: str | None = None):
        self.root = Path(media_dir or CFG.media_dir) / PROOFS_SUBDIR
        self.public_base_url = (public_base_url or CFG.public_base_url).rstrip("/")

    def public_url(self, file_name: str) -> str:
        return f"{self.public_base_url}/proofs/{file_name}"

    def resolve(self, file_name: str) -> Path | None:
        """Map a requested name to a stored file, rejecting anything path-like."""
        name = str(file_name or "")
        if not _SAFE_FILE_NAME_RE.match(name) or name.startswith("."):
            return None
        path = self.root / name
        return path if path.is_file() else None

    async def save(self, order_id: str, data: bytes, *, now: datetime | None = None) -> dict[str, str]:
        if not data:
            raise ValueError("empty payment proof")
        moment = now or datetime.now(timezone.utc)
        file_name = f"{order_id}_{int(moment.timestamp() * 1000)}_{secrets.token_hex(4)}.jpg"
        path = self.root / file_name

        def _write() -> None:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Stored payment proof %s (%s bytes)", file_name, len(data))
        return {
            "url": self.public_url(file_name),
            "file_name": file_name,
            "uploaded_at": moment.isoformat(),
        }

    async def discard(self, file_name: str) -> None:
        """Remove a stored proof that never got attached to its order."""
        path = self.resolve(file_name)
        if path is None:
            return
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info("Discarded unclaimed payment proof %s", file_name)
