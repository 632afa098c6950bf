import difflib
from collections import Counter
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from loguru import logger

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.models.models import AudioQuality
from hangjegyzet.schemas.accuracy import (
    AccuracyMetricCreate, AccuracyMetricRead, AccuracyReport, CommonError, Recommendation
)
from hangjegyzet.schemas.transcription import JobRecord, TranscriptSegment
from hangjegyzet.schemas.vocabulary import CorrectionCreate, CorrectionRead
from hangjegyzet.services.vocabulary_service import VocabularyService
from hangjegyzet.storage.base import PipelineStore
from hangjegyzet.utils.text import char_error_rate, word_error_rate, words
from hangjegyzet.utils.time import report_window, utcnow

WELL_RECOGNIZED_CONFIDENCE = 0.8
POORLY_RECOGNIZED_CONFIDENCE = 0.5
POOR_QUALITY_RATE = 0.2
HIGH_AVERAGE_WER = 0.15
POORLY_RECOGNIZED_LIMIT = 5


def transcript_text(segments: Sequence[TranscriptSegment]) -> str:
    return " ".join(segment.text.strip() for segment in segments if segment.text.strip())


class AccuracyMonitor:
    """
    Observational accuracy tracking

    Estimates error rates for every completed job, scores human corrections
    and aggregates both into periodic reports. It never changes pipeline
    policy; corrections are only forwarded to vocabulary learning.
    """

    def __init__(
        self,
        store: PipelineStore,
        vocabulary: Optional[VocabularyService] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.vocabulary = vocabulary
        self.config = config or default_settings
        self.clock = clock

    @staticmethod
    def estimate_error_rates(
        pass_texts: Sequence[str], merged_text: str, confidence: float
    ) -> Tuple[float, float]:
        """
        WER and CER proxies for a transcript without a reference

        With several passes, the mean disagreement of each pass with the
        merged text. With one pass, 1 - confidence.
        """
        texts = [t for t in pass_texts if t is not None]
        if len(texts) < 2:
            proxy = min(1.0, max(0.0, 1.0 - confidence))
            return proxy, proxy
        wer = sum(word_error_rate(merged_text, text) for text in texts) / len(texts)
        cer = sum(char_error_rate(merged_text, text) for text in texts) / len(texts)
        return min(1.0, wer), min(1.0, cer)

    def meets_target(self, quality: AudioQuality, wer: float) -> bool:
        return wer <= self.config.ACCURACY_MAX_WER[AudioQuality(quality).value]

    async def record_job(
        self,
        job: JobRecord,
        segments: Sequence[TranscriptSegment],
        pass_texts: Sequence[str],
        processing_seconds: float,
        merged_text: Optional[str] = None,
    ) -> AccuracyMetricRead:
        """
        Compute and store the accuracy metric of a finished job

        Args:
            job: The finished job
            segments: Final segments, used for the confidence statistics
            pass_texts: Raw text of each transcription pass
            processing_seconds: Wall time of the attempt
            merged_text: Multi-pass merge before vocabulary and AI
                corrections, the reference for pass disagreement. Defaults
                to the text of segments.
        """
        confidences = [s.confidence for s in segments] or [job.confidence or 0.0]
        confidence_mean = sum(confidences) / len(confidences)
        low = sum(1 for c in confidences if c < self.config.ACCURACY_LOW_CONFIDENCE)
        if merged_text is None:
            merged_text = transcript_text(segments)
        wer, cer = self.estimate_error_rates(pass_texts, merged_text, job.confidence or confidence_mean)
        quality = job.audio_quality or AudioQuality.FAIR

        metric = await self.store.add_metric(AccuracyMetricCreate(
            organization_id=job.organization_id,
            job_id=job.id,
            mode=job.mode,
            audio_quality=quality,
            snr_db=job.snr_db,
            estimated_wer=round(wer, 4),
            estimated_cer=round(cer, 4),
            confidence_mean=round(confidence_mean, 4),
            confidence_min=min(confidences),
            confidence_max=max(confidences),
            low_confidence_ratio=round(low / len(confidences), 4),
            pass_count=job.pass_count or 1,
            processing_seconds=round(processing_seconds, 3),
            audio_duration_seconds=job.duration_seconds or 0.0,
            meets_target=self.meets_target(quality, wer),
        ))
        logger.info(
            f"Job {job.id} accuracy: WER~{wer:.3f}, CER~{cer:.3f}, "
            f"quality {quality.value}, target {'met' if metric.meets_target else 'missed'}"
        )
        return metric

    async def record_correction(self, obj_in: CorrectionCreate) -> CorrectionRead:
        """Store a human correction with its error rates and feed vocabulary learning"""
        wer = word_error_rate(obj_in.corrected_text, obj_in.original_text)
        cer = char_error_rate(obj_in.corrected_text, obj_in.original_text)
        record = await self.store.add_correction(obj_in, wer=round(wer, 4), cer=round(cer, 4))
        if self.vocabulary is not None:
            await self.vocabulary.learn_from_correction(
                obj_in.organization_id, obj_in.original_text, obj_in.corrected_text
            )
        return record

    @staticmethod
    def correction_pairs(original: str, corrected: str) -> List[Tuple[str, str]]:
        """Word-level (original, corrected) replacements between two texts"""
        source = words(original)
        target = words(corrected)
        pairs = []
        matcher = difflib.SequenceMatcher(a=source, b=target, autojunk=False)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag != "replace":
                continue
            if i2 - i1 == j2 - j1:
                pairs.extend(zip(source[i1:i2], target[j1:j2]))
            else:
                pairs.append((" ".join(source[i1:i2]), " ".join(target[j1:j2])))
        return pairs

    async def generate_report(
        self, organization_id: str, period: str = "weekly", moment: Optional[datetime] = None
    ) -> Optional[AccuracyReport]:
        """
        Aggregate an organization's accuracy over a reporting period

        Args:
            organization_id: Organization ID
            period: "weekly" or "monthly"
            moment: End of the reporting window, defaults to now

        Returns:
            The report, or None while fewer than ACCURACY_REPORT_MIN_SAMPLES
            metrics exist in the window
        """
        start, end = report_window(period, moment or self.clock())
        metrics = await self.store.list_metrics(organization_id, start=start, end=end)
        if len(metrics) < self.config.ACCURACY_REPORT_MIN_SAMPLES:
            logger.debug(f"Not enough samples for {organization_id} {period} report: {len(metrics)}")
            return None

        count = len(metrics)
        quality_distribution = Counter(m.audio_quality.value for m in metrics)
        mode_distribution = Counter(m.mode.value for m in metrics)

        errors: Counter = Counter()
        for record in await self.store.list_corrections(organization_id, since=start):
            errors.update(self.correction_pairs(record.original_text, record.corrected_text))
        common_errors = [
            CommonError(original=original, corrected=corrected, frequency=frequency)
            for (original, corrected), frequency in sorted(errors.items(), key=lambda item: (-item[1], item[0]))
        ][: self.config.ACCURACY_COMMON_ERRORS_LIMIT]

        terms = await self.store.list_terms(organization_id)
        well = sorted(t.term for t in terms if t.confidence_score > WELL_RECOGNIZED_CONFIDENCE)
        poorly = [
            t.term for t in sorted(terms, key=lambda t: (t.confidence_score, t.term))
            if t.confidence_score < POORLY_RECOGNIZED_CONFIDENCE
        ]

        report = AccuracyReport(
            organization_id=organization_id,
            period=period,
            period_start=start,
            period_end=end,
            sample_size=count,
            average_wer=round(sum(m.estimated_wer for m in metrics) / count, 4),
            average_cer=round(sum(m.estimated_cer for m in metrics) / count, 4),
            average_confidence=round(sum(m.confidence_mean for m in metrics) / count, 4),
            targets_met_ratio=round(sum(1 for m in metrics if m.meets_target) / count, 4),
            quality_distribution=dict(quality_distribution),
            mode_distribution=dict(mode_distribution),
            common_errors=common_errors,
            well_recognized_terms=well,
            poorly_recognized_terms=poorly,
        )
        report.recommendations = self.recommendations(report)
        return report

    @staticmethod
    def recommendations(report: AccuracyReport) -> List[Recommendation]:
        recommendations = []

        poor_rate = report.quality_distribution.get(AudioQuality.POOR.value, 0) / report.sample_size
        if poor_rate > POOR_QUALITY_RATE:
            recommendations.append(Recommendation(
                kind="improve_audio_quality",
                message="Consider improving the recording setup: over 20% of recordings have poor audio quality.",
                details={"poor_quality_rate": round(poor_rate, 4)},
            ))

        if report.average_wer > HIGH_AVERAGE_WER:
            recommendations.append(Recommendation(
                kind="raise_mode",
                message="Average word error rate is high. Consider a higher mode or enabling multi-pass transcription.",
                details={"average_wer": report.average_wer},
            ))

        if report.average_confidence < 0.7:
            recommendations.append(Recommendation(
                kind="enable_ai_post_processing",
                message="Average confidence is low. Enable AI post-processing for better results.",
                details={"average_confidence": report.average_confidence},
            ))

        if len(report.poorly_recognized_terms) > POORLY_RECOGNIZED_LIMIT:
            top = report.poorly_recognized_terms[:3]
            recommendations.append(Recommendation(
                kind="review_vocabulary",
                message=f"Update phonetic hints for poorly recognized terms: {', '.join(top)}",
                details={"terms": top},
            ))

        if report.common_errors:
            top = [error.corrected for error in report.common_errors[:3]]
            recommendations.append(Recommendation(
                kind="add_common_errors",
                message=f"Consider adding these frequently corrected terms to the vocabulary: {', '.join(top)}",
                details={"terms": top},
            ))
        return recommendations
