"""Split long audio into fixed-size overlapping windows."""

from __future__ import annotations

import logging
from typing import List

import numpy as np

from models import Chunk

logger = logging.getLogger(__name__)


def chunk_audio(samples: np.ndarray, max_chunk_samples: int, overlap_samples: int) -> List[Chunk]:
    """Split ``samples`` into windows of ``max_chunk_samples`` sharing ``overlap_samples``.

    Short input comes back as one unpadded chunk. For longer input every window
    after the first that runs past the end is zero-padded to full length. The
    walk stops at the first window reaching the end of the input, so no window
    lies entirely inside its predecessor.
    """
    samples = np.asarray(samples, dtype=np.float32)
    total = len(samples)
    if total == 0:
        return []
    if total <= max_chunk_samples:
        return [Chunk(start_offset=0, samples=_readonly(samples), padded=False)]

    stride = max(1, max_chunk_samples - overlap_samples)
    chunks: List[Chunk] = []
    start = 0
    while start < total:
        end = min(start + max_chunk_samples, total)
        window = samples[start:end]
        padded = len(window) < max_chunk_samples and start > 0
        if padded:
            window = np.pad(window, (0, max_chunk_samples - len(window)))
        chunks.append(Chunk(start_offset=start, samples=_readonly(window), padded=padded))
        if end >= total:
            break
        start += stride

    logger.info(f"Split {total} samples into {len(chunks)} chunks")
    return chunks


def _readonly(window: np.ndarray) -> np.ndarray:
    view = window.view()
    view.flags.writeable = False
    return view
