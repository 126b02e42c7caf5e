from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from app.errors import UpstreamFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SealedWill:
    content: bytes
    media_type: str = "application/octet-stream"
    attachments: list[str] = field(default_factory=list)


class WillStore(Protocol):
    def get_sealed_content(self, testator_id: str) -> SealedWill: ...


class FileWillStore:
    """Sealed wills laid out on disk by the editor collaborator.

    ``<root>/<testator_id>/will.sealed`` holds the serialized, signed will;
    files under ``<root>/<testator_id>/attachments/`` are referenced by
    relative path (media blobs stay with the media store).
    """

    WILL_FILENAME = "will.sealed"

    def __init__(self, root: Path) -> None:
        self._root = root

    def get_sealed_content(self, testator_id: str) -> SealedWill:
        testator_dir = (self._root / testator_id).resolve()
        if self._root.resolve() not in testator_dir.parents:
            raise UpstreamFailure(f"Refusing path outside will store: {testator_id}")

        will_path = testator_dir / self.WILL_FILENAME
        try:
            content = will_path.read_bytes()
        except OSError as exc:
            logger.error("Sealed will unavailable for testator %s: %s", testator_id, exc)
            raise UpstreamFailure(f"Sealed will unavailable: {exc}") from exc

        attachments_dir = testator_dir / "attachments"
        attachments: list[str] = []
        if attachments_dir.is_dir():
            attachments = sorted(
                str(p.relative_to(testator_dir))
                for p in attachments_dir.rglob("*")
                if p.is_file()
            )

        return SealedWill(
            content=content,
            attachments=attachments,
        )
