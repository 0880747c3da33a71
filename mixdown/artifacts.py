"""Published artifacts and the revocable links that point at them."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger("artifacts")

_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mp4": "m4a",
    "audio/mpeg": "mp3",
}


def extension_for(media_type: str) -> str:
    """File extension for a media type, ignoring codec parameters."""
    base = media_type.split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base, "bin")


@dataclass(frozen=True)
class EncodedArtifact:
    """A named, typed byte payload ready for playback or download."""
    data: bytes
    media_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)


class ArtifactRegistry:
    """Hands out revocable URLs for artifacts, like browser object URLs."""

    def __init__(self, prefix: str = "/artifacts"):
        self._prefix = prefix.rstrip("/")
        self._items: dict[str, EncodedArtifact] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, url: str) -> bool:
        return url in self._items

    def publish(self, artifact: EncodedArtifact) -> str:
        url = f"{self._prefix}/{uuid.uuid4().hex}/{artifact.filename}"
        self._items[url] = artifact
        log.info("Published %s (%s, %d bytes)", url, artifact.media_type, artifact.size)
        return url

    def resolve(self, url: str) -> Optional[EncodedArtifact]:
        return self._items.get(url)

    def revoke(self, url: Optional[str]) -> bool:
        if url and self._items.pop(url, None) is not None:
            log.debug("Revoked %s", url)
            return True
        return False

    def revoke_all(self):
        self._items.clear()
