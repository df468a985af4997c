"""Cache lifetime policy per media class.

Both tables are closed: every MIME type maps to exactly one class (unknown
types fall into ``MediaClass.DEFAULT``) and every class has a TTL, so
``resolve_cache_control`` is total over arbitrary strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping


DAY_SECONDS = 86400


class MediaClass(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    MODEL = "model"
    DEFAULT = "default"


@dataclass(frozen=True)
class CachePolicy:
    max_age: int

    @property
    def stale_while_revalidate(self) -> int:
        return self.max_age * 2

    def directive(self) -> str:
        return f"public, max-age={self.max_age}, stale-while-revalidate={self.stale_while_revalidate}"


MIME_TO_CLASS: Mapping[str, MediaClass] = MappingProxyType(
    {
        "image/png": MediaClass.IMAGE,
        "image/jpeg": MediaClass.IMAGE,
        "image/webp": MediaClass.IMAGE,
        "image/gif": MediaClass.IMAGE,
        "video/mp4": MediaClass.VIDEO,
        "video/webm": MediaClass.VIDEO,
        "audio/mpeg": MediaClass.AUDIO,
        "audio/wav": MediaClass.AUDIO,
        # untyped blobs in the media bucket are model weights
        "application/octet-stream": MediaClass.MODEL,
    }
)

CACHE_POLICIES: Mapping[MediaClass, CachePolicy] = MappingProxyType(
    {
        MediaClass.IMAGE: CachePolicy(max_age=DAY_SECONDS * 30),
        MediaClass.VIDEO: CachePolicy(max_age=DAY_SECONDS * 7),
        MediaClass.AUDIO: CachePolicy(max_age=DAY_SECONDS * 14),
        MediaClass.MODEL: CachePolicy(max_age=DAY_SECONDS * 365),
        MediaClass.DEFAULT: CachePolicy(max_age=3600),
    }
)


def classify_media_type(content_type: str) -> MediaClass:
    return MIME_TO_CLASS.get(content_type, MediaClass.DEFAULT)


def cache_policy_for(media_class: MediaClass) -> CachePolicy:
    return CACHE_POLICIES[media_class]


def resolve_cache_control(content_type: str) -> str:
    """Return the ``Cache-Control`` value for a declared content type."""
    return cache_policy_for(classify_media_type(content_type)).directive()
