from __future__ import annotations

from enum import Enum

# EBML header magic that opens every WebM/Matroska container
WEBM_MAGIC = b"\x1a\x45\xdf\xa3"


class ChunkVerdict(str, Enum):
    accepted = "accepted"
    too_small = "too_small"
    invalid_format = "invalid_format"


def validate_chunk(data: bytes, min_size: int = 100, search_window: int = 50) -> ChunkVerdict:
    """Classify a raw binary frame before any disk or subprocess work.

    Frames shorter than ``min_size`` are treated as noise/keepalives. Longer
    frames must carry the container magic entirely within the first
    ``search_window`` bytes.
    """
    if len(data) < min_size:
        return ChunkVerdict.too_small
    if data[:search_window].find(WEBM_MAGIC) == -1:
        return ChunkVerdict.invalid_format
    return ChunkVerdict.accepted
