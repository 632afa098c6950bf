import pytest

from hangjegyzet.schemas.transcription import TranscriptSegment
from hangjegyzet.services.chunking import ChunkPlan, plan_chunks, reassemble


def segment(start, end, text):
    return TranscriptSegment(start_time=start, end_time=end, text=text, confidence=0.9)


class TestPlanChunks:

    def test_short_audio_is_one_chunk(self):
        assert plan_chunks(120.0, 180.0, 10.0, 300.0) == [ChunkPlan(index=0, start=0.0, end=120.0)]

    def test_long_audio_overlaps(self):
        chunks = plan_chunks(600.0, 180.0, 10.0, 300.0)
        assert [(c.start, c.end) for c in chunks] == [(0.0, 180.0), (170.0, 350.0), (340.0, 520.0), (510.0, 600.0)]
        assert [c.index for c in chunks] == [0, 1, 2, 3]

    def test_chunks_cover_everything(self):
        chunks = plan_chunks(3600.0, 180.0, 10.0, 300.0)
        assert chunks[0].start == 0.0
        assert chunks[-1].end == 3600.0
        assert all(b.start < a.end for a, b in zip(chunks, chunks[1:]))

    def test_overlap_must_be_shorter_than_chunk(self):
        with pytest.raises(ValueError):
            plan_chunks(600.0, 10.0, 10.0, 300.0)


class TestReassemble:

    def test_out_of_order_results(self):
        first = ChunkPlan(index=0, start=0.0, end=180.0)
        second = ChunkPlan(index=1, start=170.0, end=350.0)
        results = [
            (second, [segment(1.0, 6.0, "a közös rész"), segment(10.0, 15.0, "második")]),
            (first, [segment(0.0, 5.0, "első"), segment(171.0, 176.0, "a közös rész")]),
        ]

        merged = reassemble(results, overlap=10.0)

        assert [s.text for s in merged] == ["első", "a közös rész", "második"]
        assert [(s.start_time, s.end_time) for s in merged] == [(0.0, 5.0), (171.0, 176.0), (180.0, 185.0)]

    def test_duplicate_text_near_boundary_dropped(self):
        first = ChunkPlan(index=0, start=0.0, end=180.0)
        second = ChunkPlan(index=1, start=170.0, end=350.0)
        results = [
            (first, [segment(168.0, 174.0, "Rendben.")]),
            (second, [segment(5.5, 9.0, "rendben")]),
        ]

        merged = reassemble(results, overlap=10.0)

        assert [s.text for s in merged] == ["Rendben."]

    def test_single_chunk_passthrough(self):
        only = ChunkPlan(index=0, start=0.0, end=60.0)
        merged = reassemble([(only, [segment(3.0, 4.0, "b"), segment(0.0, 1.0, "a")])], overlap=10.0)
        assert [s.text for s in merged] == ["a", "b"]
