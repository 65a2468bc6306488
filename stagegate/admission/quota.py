"""Per-user, per-calendar-month usage counters with reversible reservations."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional

from .. import config
from ..api.jobs.models import QuotaReservation, ReservationState
from ..api.jobs.store import JobStore, new_id
from ..config_structured import PlanId, UsageMetric
from .errors import QuotaExceeded

logger = logging.getLogger(__name__)

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def period_key_for(moment: datetime) -> str:
    """Calendar-month key (``YYYY-MM``) in UTC."""
    moment = moment.astimezone(timezone.utc) if moment.tzinfo else moment
    return f"{moment.year:04d}-{moment.month:02d}"


def parse_period_key(period_key: str) -> datetime:
    """First instant of the month named by *period_key*."""
    m = _PERIOD_RE.match(period_key)
    if not m or not 1 <= int(m.group(2)) <= 12:
        raise ValueError(f"Invalid periodKey: {period_key}")
    return datetime(int(m.group(1)), int(m.group(2)), 1, tzinfo=timezone.utc)


class QuotaLedger:
    """Reserve and roll back plan-limited capacity.

    Reservation is a single conditional increment in the store (only if the
    resulting total stays within the limit), so two concurrent reservations
    can never both pass a stale check.  Each reservation is settled at most
    once: rolled back (usage decremented) or consumed (kept).
    """

    def __init__(self, store: JobStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def current_period_key(self) -> str:
        return period_key_for(self._clock())

    @staticmethod
    def limit_for(plan: PlanId | str, metric: UsageMetric | str) -> int:
        return config.plan_limit(PlanId(plan), UsageMetric(metric))

    async def usage(self, user_id: str, metric: UsageMetric | str, period_key: str | None = None) -> int:
        return await self._store.get_usage(
            user_id, period_key or self.current_period_key(), UsageMetric(metric).value
        )

    async def reserve(
        self,
        user_id: str,
        plan: PlanId | str,
        metric: UsageMetric | str,
        amount: int = 1,
    ) -> QuotaReservation:
        """Reserve *amount* of *metric* for the current period.

        Raises
        ------
        QuotaExceeded
            If ``used + amount`` would exceed the plan's limit.
        """
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        metric = UsageMetric(metric)
        limit = self.limit_for(plan, metric)
        reservation = QuotaReservation(
            id=new_id(),
            user_id=user_id,
            period_key=self.current_period_key(),
            metric=metric.value,
            amount=amount,
        )
        if amount > limit:
            used = await self._store.get_usage(user_id, reservation.period_key, metric.value)
            raise QuotaExceeded(metric.value, limit, used)

        reserved, used = await self._store.try_reserve(reservation, limit)
        if not reserved:
            raise QuotaExceeded(metric.value, limit, used)
        logger.debug(
            "Reserved %d %s for user %s in %s (now %d/%d)",
            amount, metric.value, user_id, reservation.period_key, used, limit,
        )
        return reservation

    async def rollback(self, reservation: QuotaReservation) -> bool:
        """Return the reservation's capacity.  A second call is a no-op.

        Returns True only on the call that actually decremented usage.
        """
        rolled_back = await self._store.settle_reservation(reservation.id, ReservationState.rolled_back)
        if rolled_back:
            logger.info(
                "Rolled back %d %s for user %s in %s",
                reservation.amount, reservation.metric, reservation.user_id, reservation.period_key,
            )
        return rolled_back

    async def consume(self, reservation: QuotaReservation) -> bool:
        """Mark the reservation billed so it can never be rolled back."""
        return await self._store.settle_reservation(reservation.id, ReservationState.consumed)

    async def get(self, reservation_id: str) -> Optional[QuotaReservation]:
        return await self._store.get_reservation(reservation_id)
