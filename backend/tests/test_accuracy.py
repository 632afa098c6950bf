import uuid

import pytest

from hangjegyzet.core.modes import resolve_processing_options
from hangjegyzet.models.models import AudioQuality, TranscriptionMode
from hangjegyzet.schemas.accuracy import AccuracyMetricCreate
from hangjegyzet.schemas.transcription import JobRecord
from hangjegyzet.schemas.vocabulary import CorrectionCreate, VocabularyTermCreate
from hangjegyzet.services.accuracy_monitor import AccuracyMonitor
from hangjegyzet.services.vocabulary_service import VocabularyService
from hangjegyzet.utils.time import utcnow

from fakes import ORG_ID, make_segments


def make_job(quality=AudioQuality.GOOD, confidence=0.95, pass_count=1) -> JobRecord:
    return JobRecord(
        id=str(uuid.uuid4()),
        created_at=utcnow(),
        meeting_id="meeting-1",
        organization_id=ORG_ID,
        source_audio_path="/tmp/meeting.wav",
        mode=TranscriptionMode.BALANCED,
        language="hu",
        options=resolve_processing_options(TranscriptionMode.BALANCED, "hu"),
        queue_priority=2,
        max_attempts=3,
        estimated_duration_minutes=2.0,
        duration_seconds=120.0,
        audio_quality=quality,
        snr_db=22.0,
        pass_count=pass_count,
        confidence=confidence,
    )


def metric(quality=AudioQuality.GOOD, wer=0.05, confidence=0.9, mode=TranscriptionMode.BALANCED):
    return AccuracyMetricCreate(
        organization_id=ORG_ID,
        mode=mode,
        audio_quality=quality,
        estimated_wer=wer,
        estimated_cer=wer / 2,
        confidence_mean=confidence,
        confidence_min=confidence,
        confidence_max=confidence,
        low_confidence_ratio=0.0,
        processing_seconds=10.0,
        audio_duration_seconds=120.0,
        meets_target=True,
    )


@pytest.fixture
def monitor(store, config) -> AccuracyMonitor:
    return AccuracyMonitor(store, VocabularyService(store, config=config), config)


class TestEstimates:

    def test_single_pass_uses_confidence(self):
        wer, cer = AccuracyMonitor.estimate_error_rates(["egy kettő"], "egy kettő", 0.8)
        assert wer == pytest.approx(0.2)
        assert cer == pytest.approx(0.2)

    def test_multi_pass_uses_disagreement(self):
        wer, _ = AccuracyMonitor.estimate_error_rates(["a b c d", "a b c x"], "a b c d", 0.99)
        assert wer == pytest.approx(0.125)

    def test_agreeing_passes_estimate_zero(self):
        assert AccuracyMonitor.estimate_error_rates(["Jó napot!", "jó napot"], "jó napot", 0.5) == (0.0, 0.0)


class TestRecording:

    async def test_record_job_meets_target(self, monitor, store, organization):
        job = make_job()
        metric = await monitor.record_job(job, make_segments("jó napot", "kezdjük", confidence=0.95), ["x"], 12.5)

        assert metric.job_id == job.id
        assert metric.estimated_wer == pytest.approx(0.05)
        assert metric.meets_target
        assert metric.confidence_mean == pytest.approx(0.95)
        assert metric.low_confidence_ratio == 0.0
        assert len(await store.list_metrics(ORG_ID)) == 1

    async def test_record_job_misses_target(self, monitor, organization):
        job = make_job(quality=AudioQuality.FAIR, confidence=0.5)
        segments = make_segments("zajos", "felvétel", confidence=0.5)

        metric = await monitor.record_job(job, segments, ["zajos felvétel"], 3.0)

        assert not metric.meets_target
        assert metric.low_confidence_ratio == 1.0

    async def test_corrections_are_not_counted_as_errors(self, monitor, organization):
        job = make_job(pass_count=2)
        corrected = make_segments("nyisd meg a Jira jegyet")
        passes = ["nyisd meg a dzsíra jegyet", "nyisd meg a dzsíra jegyet"]

        metric = await monitor.record_job(job, corrected, passes, 4.0, merged_text="nyisd meg a dzsíra jegyet")
        against_final = await monitor.record_job(job, corrected, passes, 4.0)

        assert metric.estimated_wer == 0.0
        assert metric.estimated_cer == 0.0
        assert against_final.estimated_wer == pytest.approx(0.2)

    async def test_record_correction_scores_and_learns(self, monitor, store, organization):
        teams = await monitor.vocabulary.add_term(ORG_ID, VocabularyTermCreate(term="Teams"))

        record = await monitor.record_correction(CorrectionCreate(
            organization_id=ORG_ID,
            original_text="indítsd el a tems hívást",
            corrected_text="indítsd el a Teams hívást",
        ))

        assert record.wer == pytest.approx(0.2)
        assert record.cer > 0
        assert (await store.get_term(teams.id)).confidence_score < teams.confidence_score

    def test_correction_pairs(self):
        assert AccuracyMonitor.correction_pairs("a jira jegy kész", "a Confluence jegy kész") == [
            ("jira", "confluence")
        ]
        assert AccuracyMonitor.correction_pairs("egy két három", "egy kettőhárom") == [("két három", "kettőhárom")]
        assert AccuracyMonitor.correction_pairs("változatlan", "Változatlan.") == []


class TestReport:

    async def test_not_enough_samples(self, monitor, store, organization):
        for _ in range(9):
            await store.add_metric(metric())
        assert await monitor.generate_report(ORG_ID) is None

    async def test_report_aggregates_and_recommends(self, monitor, store, organization):
        for _ in range(3):
            await store.add_metric(metric(AudioQuality.POOR, wer=0.3, confidence=0.6))
        for _ in range(7):
            await store.add_metric(metric(AudioQuality.GOOD, wer=0.05, confidence=0.6, mode=TranscriptionMode.FAST))
        await store.add_correction(CorrectionCreate(
            organization_id=ORG_ID, original_text="a jira jegy", corrected_text="a Confluence jegy"
        ))

        report = await monitor.generate_report(ORG_ID, "monthly")

        assert report.sample_size == 10
        assert report.average_wer == pytest.approx(0.125)
        assert report.quality_distribution == {"poor": 3, "good": 7}
        assert report.mode_distribution == {"balanced": 3, "fast": 7}
        assert report.common_errors[0].original == "jira"
        assert report.common_errors[0].frequency == 1
        assert [r.kind for r in report.recommendations] == [
            "improve_audio_quality", "enable_ai_post_processing", "add_common_errors"
        ]

    async def test_term_buckets(self, monitor, store, organization):
        for _ in range(10):
            await store.add_metric(metric())
        await monitor.vocabulary.add_term(ORG_ID, VocabularyTermCreate(term="Jira", confidence_score=0.95))
        await monitor.vocabulary.add_term(ORG_ID, VocabularyTermCreate(term="Grafana", confidence_score=0.3))

        report = await monitor.generate_report(ORG_ID)

        assert report.well_recognized_terms == ["Jira"]
        assert report.poorly_recognized_terms == ["Grafana"]
        assert report.recommendations == []

    async def test_unknown_period(self, monitor, organization):
        with pytest.raises(ValueError):
            await monitor.generate_report(ORG_ID, "daily")
