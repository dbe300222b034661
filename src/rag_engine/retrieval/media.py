"""Keyword detection of queries about transcribed video or audio documents.

Media chunks come from transcripts and tend to score lower against a question
than prose does, so the retriever widens its search when a query names one.
"""

from __future__ import annotations

from enum import Enum


class MediaType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"


# Vietnamese and English phrasings, matched as lowercase substrings.
VIDEO_KEYWORDS: tuple[str, ...] = (
    "video",
    "clip",
    "phim",
    "hình ảnh",
    "xem",
    "tóm tắt video",
    "nội dung video",
    "trong video",
    "về video",
    "watch",
    "footage",
    "movie",
    "scene",
    "visual",
    "in the video",
    "about the video",
    "summarize video",
    "video content",
)

AUDIO_KEYWORDS: tuple[str, ...] = (
    "audio",
    "âm thanh",
    "giọng nói",
    "nghe",
    "podcast",
    "ghi âm",
    "trong audio",
    "về audio",
    "sound",
    "voice",
    "listen",
    "recording",
    "speech",
    "in the audio",
    "about the audio",
)


def detect_media_query(query: str) -> MediaType | None:
    """Return the media type a query asks about; video wins over audio."""
    text = query.lower()
    if any(keyword in text for keyword in VIDEO_KEYWORDS):
        return MediaType.VIDEO
    if any(keyword in text for keyword in AUDIO_KEYWORDS):
        return MediaType.AUDIO
    return None
