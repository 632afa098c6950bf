import math
import uuid
from datetime import timedelta
from typing import Callable, Dict, Optional

from loguru import logger

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import QuotaStoreUnavailableError, ResourceNotFoundError, ValidationError
from hangjegyzet.models.models import TranscriptionMode
from hangjegyzet.schemas.organization import OrganizationRead
from hangjegyzet.schemas.transcription import (
    AdmissionDecision, AdmissionRejectReason, AdmissionRequest, ModeUsage, UsageSummary
)
from hangjegyzet.services.burst_limiter import BurstLimiter
from hangjegyzet.storage.base import PipelineStore
from hangjegyzet.utils.time import period_key, period_reset_at, utcnow


class QuotaGate:
    """
    Admission control for transcription requests

    A request is admitted only if both the organization's monthly mode
    allocation and the burst/concurrency limits allow it. Rejections are
    returned as AdmissionDecision values; only an unreachable datastore
    raises.
    """

    def __init__(
        self,
        store: PipelineStore,
        burst_limiter: BurstLimiter,
        config: Optional[Settings] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.burst_limiter = burst_limiter
        self.config = config or default_settings
        self.clock = clock
        self.held: Dict[str, AdmissionDecision] = {}

    def resolve_limit(self, organization: OrganizationRead, mode: TranscriptionMode) -> int:
        """
        Effective monthly minutes for a mode

        Organization overrides win over the plan. -1 is unlimited and 0
        means the mode is not part of the plan.
        """
        mode_value = TranscriptionMode(mode).value
        if organization.mode_limits and mode_value in organization.mode_limits:
            return int(organization.mode_limits[mode_value])
        return self.config.get_mode_limit(organization.subscription_tier, mode_value)

    @staticmethod
    def requested_minutes(estimated_duration_minutes: float) -> int:
        return max(1, math.ceil(estimated_duration_minutes))

    async def admit(self, request: AdmissionRequest) -> AdmissionDecision:
        """
        Check and commit an admission

        On success the monthly counter has been incremented and one in-flight
        slot is held until release() is called.

        Args:
            request: Admission request

        Returns:
            Admission decision

        Raises:
            QuotaStoreUnavailableError: If the counter store or burst backend fails
        """
        await self.expire_held()
        return await self._evaluate(request, commit=True)

    async def hold(self, request: AdmissionRequest) -> AdmissionDecision:
        """
        Admit a request and keep the admission for a later job submission

        The returned admission_id is redeemed by submitting the job with it,
        so the minutes are charged once. Admissions not redeemed within
        ADMISSION_HOLD_SECONDS are refunded and their in-flight slot released.

        Args:
            request: Admission request

        Returns:
            Admission decision, with admission_id and expires_at when allowed

        Raises:
            QuotaStoreUnavailableError: If the counter store or burst backend fails
        """
        decision = await self.admit(request)
        if not decision.allowed:
            return decision
        decision = decision.model_copy(update={
            "admission_id": str(uuid.uuid4()),
            "expires_at": self.clock() + timedelta(seconds=self.config.ADMISSION_HOLD_SECONDS),
        })
        self.held[decision.admission_id] = decision
        logger.info(
            f"Holding admission {decision.admission_id} for {request.organization_id} "
            f"({request.mode.value}) until {decision.expires_at.isoformat()}"
        )
        return decision

    async def redeem(
        self,
        admission_id: str,
        organization_id: str,
        mode: TranscriptionMode,
        estimated_duration_minutes: float,
    ) -> AdmissionDecision:
        """
        Take a held admission for a job submission

        Args:
            admission_id: Id returned by hold()
            organization_id: Organization of the job
            mode: Mode of the job
            estimated_duration_minutes: Duration estimate of the job

        Returns:
            The held decision; its minutes and slot now belong to the job

        Raises:
            ResourceNotFoundError: If the admission is unknown, redeemed or expired
            ValidationError: If it was granted to another organization or mode,
                or for fewer minutes than the job needs
        """
        await self.expire_held()
        decision = self.held.get(admission_id)
        if decision is None:
            raise ResourceNotFoundError("Admission", admission_id)
        if decision.organization_id != organization_id or decision.mode != TranscriptionMode(mode):
            raise ValidationError(
                "Admission was granted to another organization or mode", code="admission_mismatch"
            )
        needed = self.requested_minutes(estimated_duration_minutes)
        if needed > decision.requested:
            raise ValidationError(
                f"Admission covers {decision.requested} min, the job needs {needed}", code="admission_mismatch"
            )
        del self.held[admission_id]
        logger.debug(f"Admission {admission_id} redeemed")
        return decision

    async def expire_held(self, everything: bool = False) -> int:
        """
        Refund and release held admissions past their expiry

        Args:
            everything: Drop every held admission regardless of expiry

        Returns:
            Number of admissions dropped
        """
        now = self.clock()
        keys = [key for key, d in self.held.items() if everything or d.expires_at <= now]
        dropped = [self.held.pop(key) for key in keys]
        for decision in dropped:
            await self.refund(decision.organization_id, decision.mode, decision.period, decision.requested)
            await self.release(decision.organization_id, decision.mode)
        if dropped:
            logger.info(f"Dropped {len(dropped)} unredeemed admission(s)")
        return len(dropped)

    async def preview(self, request: AdmissionRequest) -> AdmissionDecision:
        """Same figures as admit() without touching any counter"""
        return await self._evaluate(request, commit=False)

    async def _evaluate(self, request: AdmissionRequest, commit: bool) -> AdmissionDecision:
        now = self.clock()
        period = period_key(now)
        reset_at = period_reset_at(now)
        requested = self.requested_minutes(request.estimated_duration_minutes)
        base = dict(
            organization_id=request.organization_id,
            mode=request.mode,
            requested=requested,
            period=period,
            reset_at=reset_at,
        )

        try:
            organization = await self.store.get_organization(request.organization_id)
        except QuotaStoreUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Quota store unavailable reading organization {request.organization_id}: {e}")
            raise QuotaStoreUnavailableError(str(e)) from e

        if organization is None:
            return AdmissionDecision(allowed=False, reason=AdmissionRejectReason.ORGANIZATION_NOT_FOUND, **base)

        if not organization.is_subscription_active(now):
            return AdmissionDecision(allowed=False, reason=AdmissionRejectReason.SUBSCRIPTION_EXPIRED, **base)

        limit = self.resolve_limit(organization, request.mode)
        if limit == 0:
            return AdmissionDecision(
                allowed=False, reason=AdmissionRejectReason.MODE_NOT_AVAILABLE, limit=0, used=0, remaining=0, **base
            )

        if not commit:
            used = await self._read_usage(request.organization_id, request.mode, period)
            allowed = limit == -1 or used + requested <= limit
            return AdmissionDecision(
                allowed=allowed,
                reason=None if allowed else AdmissionRejectReason.ORGANIZATION_LIMIT_EXCEEDED,
                used=used,
                limit=limit,
                remaining=self._remaining(limit, used),
                **base,
            )

        burst = await self.burst_limiter.acquire(request.organization_id, request.mode)
        if not burst.allowed:
            used = await self._read_usage(request.organization_id, request.mode, period)
            return AdmissionDecision(
                allowed=False,
                reason=burst.reason,
                used=used,
                limit=limit,
                remaining=self._remaining(limit, used),
                retry_after_seconds=burst.retry_after_seconds,
                **base,
            )

        try:
            result = await self.store.increment_usage_if_under_limit(
                request.organization_id, request.mode, period, requested, limit
            )
        except Exception as e:
            await self.burst_limiter.release(request.organization_id, request.mode)
            logger.error(f"Quota store unavailable for {request.organization_id}: {e}")
            raise QuotaStoreUnavailableError(str(e)) from e

        if not result.applied:
            await self.burst_limiter.release(request.organization_id, request.mode)
            logger.info(
                f"Admission rejected for {request.organization_id} ({request.mode.value}): "
                f"{result.used}+{requested} exceeds {limit} minutes"
            )
            return AdmissionDecision(
                allowed=False,
                reason=AdmissionRejectReason.ORGANIZATION_LIMIT_EXCEEDED,
                used=result.used,
                limit=limit,
                remaining=self._remaining(limit, result.used),
                **base,
            )

        logger.info(
            f"Admitted {requested} min for {request.organization_id} ({request.mode.value}), "
            f"usage now {result.used}/{limit}"
        )
        return AdmissionDecision(
            allowed=True,
            used=result.used,
            limit=limit,
            remaining=self._remaining(limit, result.used),
            **base,
        )

    async def refund(
        self, organization_id: str, mode: TranscriptionMode, period: str, minutes: int
    ) -> int:
        """Compensating decrement of a previous admission; returns the new usage"""
        try:
            used = await self.store.decrement_usage(organization_id, mode, period, minutes)
        except Exception as e:
            logger.error(f"Quota store unavailable refunding {organization_id}: {e}")
            raise QuotaStoreUnavailableError(str(e)) from e
        logger.info(f"Refunded {minutes} min to {organization_id} ({TranscriptionMode(mode).value}, {period})")
        return used

    async def release(self, organization_id: str, mode: TranscriptionMode) -> None:
        """Release the in-flight slot taken at admission"""
        await self.burst_limiter.release(organization_id, mode)

    async def usage_summary(self, organization_id: str) -> Optional[UsageSummary]:
        """Per-mode used/limit/remaining for the current period, None for unknown organizations"""
        await self.expire_held()
        now = self.clock()
        period = period_key(now)
        try:
            organization = await self.store.get_organization(organization_id)
        except Exception as e:
            raise QuotaStoreUnavailableError(str(e)) from e
        if organization is None:
            return None

        modes = []
        for mode in TranscriptionMode:
            limit = self.resolve_limit(organization, mode)
            used = await self._read_usage(organization_id, mode, period)
            modes.append(ModeUsage(mode=mode, used=used, limit=limit, remaining=self._remaining(limit, used)))
        return UsageSummary(
            organization_id=organization_id, period=period, reset_at=period_reset_at(now), modes=modes
        )

    async def _read_usage(self, organization_id: str, mode: TranscriptionMode, period: str) -> int:
        try:
            return await self.store.get_usage(organization_id, mode, period)
        except Exception as e:
            logger.error(f"Quota store unavailable reading usage of {organization_id}: {e}")
            raise QuotaStoreUnavailableError(str(e)) from e

    @staticmethod
    def _remaining(limit: int, used: int) -> Optional[int]:
        if limit == -1:
            return None
        return max(0, limit - used)
