"""Batch precomputation of patio sun exposure per target date."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Sequence

from precompute_store import (
    COMPLETION_THRESHOLD,
    DataFreshnessInfo,
    PrecomputationMetrics,
    PrecomputationScheduleRow,
    PrecomputationStatus,
    PrecomputationStore,
    PrecomputedSunExposureRow,
    row_from_exposure,
)
from settings import EngineSettings
from shadow_engine import Patio
from sun_exposure import SunExposureCalculator
from timeline import WeatherLookup

logger = logging.getLogger(__name__)

UTC = timezone.utc


@dataclass(frozen=True)
class IntegrityReport:
    date: date
    expected_points: int
    actual_points: int

    @property
    def is_valid(self) -> bool:
        return self.actual_points >= self.expected_points * COMPLETION_THRESHOLD


def _chunks(items: Sequence[Patio], size: int) -> Iterable[Sequence[Patio]]:
    for idx in range(0, len(items), size):
        yield items[idx:idx + size]


class PrecomputationEngine:
    """
    Runs the patio x time-slot grid for a date and persists the results.

    At most one run per date: a run only starts if it wins the
    Scheduled -> Running compare-and-set in the store.
    """

    def __init__(
        self,
        store: PrecomputationStore,
        calculator: SunExposureCalculator,
        patios: Iterable[Patio],
        settings: EngineSettings | None = None,
        weather_lookup: WeatherLookup | None = None,
    ) -> None:
        self.store = store
        self.calculator = calculator
        self.patios = [p for p in patios if p.footprint is not None and not p.footprint.is_empty]
        self.settings = settings or calculator.settings
        self.tz_provider = calculator.tz_provider
        self.weather_lookup = weather_lookup

    # ---------- slots ----------

    def time_slots(self) -> list[time]:
        """Local wall-clock slots, start and end hour inclusive."""
        step = timedelta(minutes=self.settings.slot_interval_minutes)
        current = datetime.combine(date(2000, 1, 1), time(self.settings.slot_start_hour, 0))
        end = datetime.combine(date(2000, 1, 1), time(self.settings.slot_end_hour, 0))
        slots = []
        while current <= end:
            slots.append(current.time())
            current += step
        return slots

    def slot_timestamps(self, target_date: date) -> list[datetime]:
        stamps = []
        for slot in self.time_slots():
            local = self.tz_provider.adjust_for_dst_gap(datetime.combine(target_date, slot))
            stamps.append(self.tz_provider.to_utc(local))
        # a slot pushed out of the spring-forward gap can collide with the next one
        return sorted(set(stamps))

    # ---------- scheduling ----------

    def schedule_date(self, target_date: date, now: datetime | None = None) -> PrecomputationScheduleRow:
        existing = self.store.get_schedule(target_date)
        if existing is not None:
            logger.info("Precomputation for %s already scheduled with status %s", target_date, existing.status.value)
            return existing
        schedule = self.store.create_schedule(target_date, now=now)
        logger.info("Scheduled precomputation for %s", target_date)
        return schedule

    def run_precomputation(
        self,
        target_date: date,
        cancel_event: threading.Event | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Run precomputation for target_date.

        Returns False without doing any work when the date's schedule is not
        in Scheduled status (another run holds it, or it already finished).
        A cancelled run returns True with the schedule marked Cancelled.
        Unexpected errors mark the schedule Failed and are re-raised.
        """
        if self.store.get_schedule(target_date) is None:
            self.schedule_date(target_date, now=now)

        patios = self.patios
        if not self.store.try_start(target_date, len(patios), now=now):
            current = self.store.get_schedule(target_date)
            logger.warning(
                "Precomputation for %s rejected: schedule is %s",
                target_date, current.status.value if current else "missing",
            )
            return False

        timestamps = self.slot_timestamps(target_date)
        logger.info(
            "Processing %d patios for %s with %d time slots", len(patios), target_date, len(timestamps)
        )
        processed = 0
        try:
            self.store.clear_date(target_date)
            for batch in _chunks(patios, self.settings.batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    self.store.finish(target_date, PrecomputationStatus.CANCELLED, processed)
                    logger.warning("Precomputation cancelled for %s after %d patios", target_date, processed)
                    return True

                rows: list[PrecomputedSunExposureRow] = []
                for patio in batch:
                    try:
                        patio_rows = self._precompute_patio(patio, timestamps)
                    except Exception:
                        logger.exception("Error precomputing patio %s for %s", patio.patio_id, target_date)
                        continue
                    if not patio_rows:
                        logger.warning("No slots computed for patio %s on %s", patio.patio_id, target_date)
                        continue
                    rows.extend(patio_rows)
                    processed += 1

                self.store.bulk_insert(rows)
                self.store.update_progress(target_date, processed)

            self.store.finish(target_date, PrecomputationStatus.COMPLETED, processed)
            logger.info("Completed precomputation for %s: %d/%d patios", target_date, processed, len(patios))
            return True
        except Exception as exc:
            logger.exception("Precomputation failed for %s", target_date)
            self.store.fail(target_date, str(exc) or exc.__class__.__name__)
            raise

    def _precompute_patio(self, patio: Patio, timestamps: Sequence[datetime]) -> list[PrecomputedSunExposureRow]:
        rows = []
        for ts in timestamps:
            computed_at = datetime.now(UTC)
            try:
                weather = self.weather_lookup(patio, ts) if self.weather_lookup else None
                exposure = self.calculator.calculate(patio, ts, weather=weather, now=computed_at)
            except Exception:
                logger.warning(
                    "Failed to precompute sun exposure for patio %s at %s", patio.patio_id, ts.isoformat(),
                    exc_info=True,
                )
                continue
            rows.append(
                row_from_exposure(
                    exposure,
                    computed_at=computed_at,
                    retention=timedelta(days=self.settings.retention_days),
                    version=self.settings.computation_version,
                )
            )
        return rows

    def retry_failed(self) -> list[date]:
        """Requeue failed dates that still have retries left."""
        requeued = []
        for schedule in self.store.schedules_by_status(PrecomputationStatus.FAILED):
            if self.store.requeue(schedule.target_date, self.settings.max_retries):
                requeued.append(schedule.target_date)
            else:
                logger.warning(
                    "Precomputation for %s failed %d times; manual intervention required",
                    schedule.target_date, schedule.retry_count,
                )
        if requeued:
            logger.info("Requeued failed precomputation dates: %s", ", ".join(d.isoformat() for d in requeued))
        return requeued

    # ---------- maintenance & monitoring ----------

    def reschedule(self, target_date: date, now: datetime | None = None) -> bool:
        """Put a Completed or Cancelled date back to Scheduled so it runs again."""
        if self.store.reschedule(target_date, now=now):
            logger.info("Rescheduled precomputation for %s", target_date)
            return True
        current = self.store.get_schedule(target_date)
        logger.debug(
            "Precomputation for %s not rescheduled: schedule is %s",
            target_date, current.status.value if current else "missing",
        )
        return False

    def invalidate_patio(
        self,
        patio_id: int,
        from_date: date | None = None,
        now: datetime | None = None,
    ) -> int:
        """
        Mark a patio's precomputed rows stale and reschedule the finished
        dates they belong to. Without `from_date` only slots from `now` on
        are affected. Stale rows keep serving as a fallback until the rerun.
        """
        now = now or datetime.now(UTC)
        if from_date is None:
            count = self.store.mark_patio_stale(patio_id, since=now)
            first_date = self.tz_provider.to_local(now).date()
        else:
            count = self.store.mark_patio_stale(patio_id, from_date=from_date)
            first_date = from_date
        if count:
            for stale_date in self.store.stale_dates(first_date):
                self.reschedule(stale_date, now=now)
        return count

    def cleanup_expired(self, now: datetime | None = None) -> int:
        return self.store.purge_expired(now)

    def is_complete(self, target_date: date) -> bool:
        return self.store.is_complete(target_date)

    def status(self, target_date: date) -> PrecomputationScheduleRow | None:
        return self.store.get_schedule(target_date)

    def recent_schedules(self, days: int = 7) -> list[PrecomputationScheduleRow]:
        return self.store.recent_schedules(days)

    def metrics(self, target_date: date) -> PrecomputationMetrics | None:
        return self.store.metrics(target_date)

    def freshness(self, now: datetime | None = None) -> DataFreshnessInfo:
        return self.store.freshness_info(now)

    def validate_integrity(self, target_date: date) -> IntegrityReport:
        expected = len(self.patios) * len(self.slot_timestamps(target_date))
        return IntegrityReport(
            date=target_date,
            expected_points=expected,
            actual_points=self.store.count_for_date(target_date),
        )
