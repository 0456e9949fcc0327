from __future__ import annotations

import numpy as np
import pytest

from chunker import chunk_audio

SR = 16000
MAX = 30 * SR
OVERLAP = 5 * SR


@pytest.mark.parametrize("n_samples", [1, 15 * SR, MAX - 1, MAX])
def test_short_audio_is_single_unpadded_chunk(n_samples: int) -> None:
    chunks = chunk_audio(np.ones(n_samples, dtype=np.float32), MAX, OVERLAP)

    assert len(chunks) == 1
    assert chunks[0].start_offset == 0
    assert chunks[0].padded is False
    assert len(chunks[0].samples) == n_samples


def test_empty_audio_yields_no_chunks() -> None:
    assert chunk_audio(np.zeros(0, dtype=np.float32), MAX, OVERLAP) == []


def test_65_seconds_gives_three_chunks_with_padded_tail() -> None:
    samples = np.ones(65 * SR, dtype=np.float32)
    chunks = chunk_audio(samples, MAX, OVERLAP)

    assert len(chunks) == 3
    assert [len(c.samples) for c in chunks] == [MAX, MAX, MAX]
    assert [c.padded for c in chunks] == [False, False, True]
    # Last chunk holds 15s of audio followed by zero padding.
    tail = chunks[2].samples
    assert np.all(tail[: 15 * SR] == 1.0)
    assert np.all(tail[15 * SR:] == 0.0)


def test_consecutive_chunks_overlap_by_overlap_samples() -> None:
    chunks = chunk_audio(np.ones(120 * SR, dtype=np.float32), MAX, OVERLAP)

    offsets = [c.start_offset for c in chunks]
    assert offsets == [0, 25 * SR, 50 * SR, 75 * SR, 100 * SR]
    for prev, nxt in zip(chunks, chunks[1:]):
        prev_end = prev.start_offset + MAX
        assert prev_end - nxt.start_offset == OVERLAP


def test_chunks_cover_input_without_gaps() -> None:
    samples = np.arange(47 * SR, dtype=np.float32)
    chunks = chunk_audio(samples, MAX, OVERLAP)

    covered_until = 0
    for chunk in chunks:
        assert chunk.start_offset <= covered_until
        real = min(MAX, len(samples) - chunk.start_offset)
        np.testing.assert_array_equal(
            chunk.samples[:real], samples[chunk.start_offset:chunk.start_offset + real]
        )
        covered_until = chunk.start_offset + real
    assert covered_until == len(samples)


def test_chunk_exactly_reaching_end_stops_the_walk() -> None:
    # 55s: second window spans 25s..55s, so no third window inside it.
    chunks = chunk_audio(np.ones(55 * SR, dtype=np.float32), MAX, OVERLAP)

    assert [c.start_offset for c in chunks] == [0, 25 * SR]
    assert chunks[1].padded is False


def test_chunk_samples_are_read_only() -> None:
    chunks = chunk_audio(np.ones(40 * SR, dtype=np.float32), MAX, OVERLAP)

    with pytest.raises(ValueError):
        chunks[0].samples[0] = 2.0


def test_non_positive_stride_still_terminates() -> None:
    chunks = chunk_audio(np.ones(10, dtype=np.float32), 4, 4)

    assert chunks[-1].start_offset + 4 >= 10
    assert all(len(c.samples) == 4 for c in chunks)
