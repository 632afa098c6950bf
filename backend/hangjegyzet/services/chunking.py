"""Splitting long audio into overlapping chunks and stitching the results"""
from typing import List, Sequence, Tuple

from pydantic import BaseModel

from hangjegyzet.schemas.transcription import TranscriptSegment
from hangjegyzet.utils.text import normalize_text


class ChunkPlan(BaseModel):
    """A time range of the source audio, in seconds"""
    index: int
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


def plan_chunks(
    duration: float,
    chunk_duration: float,
    overlap: float,
    min_duration: float,
) -> List[ChunkPlan]:
    """
    Plan overlapping chunks for audio of the given duration

    Audio shorter than min_duration is a single chunk.

    Args:
        duration: Total audio duration in seconds
        chunk_duration: Length of each chunk
        overlap: Seconds shared by consecutive chunks
        min_duration: Chunking threshold

    Returns:
        Chunks ordered by start offset
    """
    if duration < min_duration or duration <= chunk_duration:
        return [ChunkPlan(index=0, start=0.0, end=duration)]

    step = chunk_duration - overlap
    if step <= 0:
        raise ValueError("Chunk overlap must be shorter than the chunk duration")

    chunks = []
    start = 0.0
    while True:
        end = min(start + chunk_duration, duration)
        chunks.append(ChunkPlan(index=len(chunks), start=start, end=end))
        if end >= duration:
            break
        start += step
    return chunks


def reassemble(
    results: Sequence[Tuple[ChunkPlan, Sequence[TranscriptSegment]]],
    overlap: float,
) -> List[TranscriptSegment]:
    """
    Merge per-chunk transcripts into one timeline

    Segment times in results are relative to their chunk. Results may
    arrive in any order. Each overlap region is owned half by the earlier
    and half by the later chunk; a segment survives only in the chunk that
    owns its midpoint, and a segment repeating the text of the previous
    kept segment at nearly the same time is dropped.

    Args:
        results: (chunk, chunk-relative segments) pairs
        overlap: Overlap used when planning the chunks

    Returns:
        Segments in absolute time, ordered by start
    """
    ordered = sorted(results, key=lambda item: item[0].start)
    half = overlap / 2.0

    kept: List[TranscriptSegment] = []
    for position, (chunk, segments) in enumerate(ordered):
        own_start = chunk.start + half if position > 0 else float("-inf")
        if position + 1 < len(ordered):
            own_end = ordered[position + 1][0].start + half
        else:
            own_end = float("inf")

        for segment in segments:
            absolute = segment.model_copy(update={
                "start_time": segment.start_time + chunk.start,
                "end_time": segment.end_time + chunk.start,
            })
            midpoint = (absolute.start_time + absolute.end_time) / 2.0
            if own_start <= midpoint < own_end:
                kept.append(absolute)

    kept.sort(key=lambda s: (s.start_time, s.end_time))

    merged: List[TranscriptSegment] = []
    for segment in kept:
        if merged and _is_duplicate(merged[-1], segment, overlap):
            continue
        merged.append(segment)
    return merged


def _is_duplicate(previous: TranscriptSegment, segment: TranscriptSegment, overlap: float) -> bool:
    if abs(segment.start_time - previous.start_time) > overlap:
        return False
    return normalize_text(previous.text) == normalize_text(segment.text)
