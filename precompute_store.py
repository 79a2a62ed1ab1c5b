"""
SQLAlchemy persistence for precomputed sun exposure rows and per-date schedules.

Instants are stored as naive UTC, `local_time` and the slot columns as wall-clock values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    Index,
    Integer,
    String,
    Text,
    Time,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from sun_exposure import PatioSunExposure, SunExposureState

logger = logging.getLogger(__name__)

UTC = timezone.utc
COMPLETION_THRESHOLD = 0.95


class PrecomputationStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Base(DeclarativeBase):
    pass


class PrecomputedSunExposureRow(Base):
    """One patio at one time slot, as written by a precomputation run."""

    __tablename__ = "precomputed_sun_exposure"
    __table_args__ = (
        Index("ix_precomputed_date_time_patio", "slot_date", "slot_time", "patio_id"),
        Index("ix_precomputed_patio_timestamp", "patio_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patio_id: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    local_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # naive wall clock
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)  # local
    slot_time: Mapped[time] = mapped_column(Time, nullable=False)

    sun_exposure_percent: Mapped[float] = mapped_column(Float, nullable=False)
    state: Mapped[SunExposureState] = mapped_column(
        SAEnum(SunExposureState, native_enum=False, length=16), nullable=False
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False)  # percent
    sunlit_area_m2: Mapped[float] = mapped_column(Float, default=0.0)
    shaded_area_m2: Mapped[float] = mapped_column(Float, default=0.0)
    solar_elevation: Mapped[float] = mapped_column(Float, nullable=False)
    solar_azimuth: Mapped[float] = mapped_column(Float, nullable=False)
    affecting_buildings_count: Mapped[int] = mapped_column(Integer, default=0)
    calculation_ms: Mapped[float] = mapped_column(Float, default=0.0)

    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    computation_version: Mapped[str] = mapped_column(String(16), default="1.0")
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    @property
    def total_area_m2(self) -> float:
        return self.sunlit_area_m2 + self.shaded_area_m2

    @property
    def is_sun_visible(self) -> bool:
        return self.solar_elevation > 0

    @property
    def calculation_duration(self) -> timedelta:
        return timedelta(milliseconds=self.calculation_ms or 0.0)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= _naive_utc(now)


class PrecomputationScheduleRow(Base):
    __tablename__ = "precomputation_schedule"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    target_date: Mapped[date] = mapped_column(Date, unique=True, nullable=False)
    status: Mapped[PrecomputationStatus] = mapped_column(
        SAEnum(PrecomputationStatus, native_enum=False, length=16),
        default=PrecomputationStatus.SCHEDULED,
        nullable=False,
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    patios_processed: Mapped[int] = mapped_column(Integer, default=0)
    patios_total: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    @property
    def duration(self) -> timedelta | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    @property
    def progress_percent(self) -> float:
        if not self.patios_total:
            return 0.0
        return self.patios_processed / self.patios_total * 100.0


@dataclass(frozen=True)
class PrecomputationMetrics:
    date: date
    patios_processed: int
    patios_total: int
    total_records: int
    total_duration: timedelta
    average_calculation_time: timedelta
    error_rate: float

    @property
    def processing_rate(self) -> float:
        """Patios per hour."""
        hours = self.total_duration.total_seconds() / 3600.0
        return self.patios_processed / hours if hours > 0 else 0.0


@dataclass(frozen=True)
class DataFreshnessInfo:
    total_records: int
    fresh_records: int
    stale_records: int
    expired_records: int
    oldest_computed_at: datetime | None
    newest_computed_at: datetime | None


def make_engine(database_url: str) -> Engine:
    """Engine for database_url; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(database_url, pool_pre_ping=True)


class PrecomputationStore:
    def __init__(self, database_url: str = "sqlite:///precomputed.db", engine: Engine | None = None) -> None:
        self.engine = engine or make_engine(database_url)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    # ---------- precomputed rows ----------

    def lookup(
        self,
        patio_id: int,
        timestamp: datetime,
        tolerance_minutes: int = 5,
    ) -> PrecomputedSunExposureRow | None:
        """Row for patio_id nearest to timestamp within +/- tolerance_minutes."""
        target = _naive_utc(timestamp)
        tolerance = timedelta(minutes=tolerance_minutes)
        with self.Session() as session:
            rows = session.scalars(
                select(PrecomputedSunExposureRow).where(
                    PrecomputedSunExposureRow.patio_id == patio_id,
                    PrecomputedSunExposureRow.timestamp >= target - tolerance,
                    PrecomputedSunExposureRow.timestamp <= target + tolerance,
                )
            ).all()
        if not rows:
            return None
        return min(rows, key=lambda r: (abs(r.timestamp - target), r.is_stale, -r.id))

    def bulk_insert(self, rows: Iterable[PrecomputedSunExposureRow]) -> int:
        rows = list(rows)
        if not rows:
            return 0
        with self.Session.begin() as session:
            session.add_all(rows)
        return len(rows)

    def rows_for_date(self, target_date: date) -> list[PrecomputedSunExposureRow]:
        with self.Session() as session:
            return list(
                session.scalars(
                    select(PrecomputedSunExposureRow)
                    .where(PrecomputedSunExposureRow.slot_date == target_date)
                    .order_by(PrecomputedSunExposureRow.patio_id, PrecomputedSunExposureRow.slot_time)
                )
            )

    def rows_for_patio(self, patio_id: int, start_date: date, end_date: date) -> list[PrecomputedSunExposureRow]:
        with self.Session() as session:
            return list(
                session.scalars(
                    select(PrecomputedSunExposureRow)
                    .where(
                        PrecomputedSunExposureRow.patio_id == patio_id,
                        PrecomputedSunExposureRow.slot_date >= start_date,
                        PrecomputedSunExposureRow.slot_date <= end_date,
                    )
                    .order_by(PrecomputedSunExposureRow.slot_date, PrecomputedSunExposureRow.slot_time)
                )
            )

    def count_for_date(self, target_date: date) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.count())
                .select_from(PrecomputedSunExposureRow)
                .where(PrecomputedSunExposureRow.slot_date == target_date)
            ) or 0

    def clear_date(self, target_date: date) -> int:
        with self.Session.begin() as session:
            result = session.execute(
                delete(PrecomputedSunExposureRow).where(PrecomputedSunExposureRow.slot_date == target_date)
            )
        return result.rowcount or 0

    def mark_patio_stale(
        self,
        patio_id: int,
        from_date: date | None = None,
        since: datetime | None = None,
    ) -> int:
        """
        Flag a patio's rows stale. `from_date` is a local slot date; `since`
        an instant. With neither, only rows for instants from now on are flagged.
        """
        if from_date is None and since is None:
            since = datetime.now(UTC)
        conditions = [PrecomputedSunExposureRow.patio_id == patio_id]
        if from_date is not None:
            conditions.append(PrecomputedSunExposureRow.slot_date >= from_date)
        if since is not None:
            conditions.append(PrecomputedSunExposureRow.timestamp >= _naive_utc(since))
        with self.Session.begin() as session:
            result = session.execute(
                update(PrecomputedSunExposureRow)
                .where(*conditions)
                .values(is_stale=True)
                .execution_options(synchronize_session=False)
            )
        count = result.rowcount or 0
        logger.info(
            "Marked %d precomputed rows stale for patio %s from %s",
            count, patio_id, from_date if since is None else since.isoformat(),
        )
        return count

    def stale_dates(self, from_date: date | None = None) -> list[date]:
        """Local slot dates that still hold stale rows."""
        query = select(PrecomputedSunExposureRow.slot_date).where(PrecomputedSunExposureRow.is_stale.is_(True))
        if from_date is not None:
            query = query.where(PrecomputedSunExposureRow.slot_date >= from_date)
        with self.Session() as session:
            return list(session.scalars(query.distinct().order_by(PrecomputedSunExposureRow.slot_date)))

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = _naive_utc(now or datetime.now(UTC))
        with self.Session.begin() as session:
            result = session.execute(
                delete(PrecomputedSunExposureRow).where(PrecomputedSunExposureRow.expires_at < cutoff)
            )
        count = result.rowcount or 0
        logger.info("Purged %d expired precomputed rows", count)
        return count

    # ---------- schedules ----------

    def get_schedule(self, target_date: date) -> PrecomputationScheduleRow | None:
        with self.Session() as session:
            return session.scalar(
                select(PrecomputationScheduleRow).where(PrecomputationScheduleRow.target_date == target_date)
            )

    def create_schedule(self, target_date: date, now: datetime | None = None) -> PrecomputationScheduleRow:
        stamp = _naive_utc(now or datetime.now(UTC))
        schedule = PrecomputationScheduleRow(
            target_date=target_date,
            status=PrecomputationStatus.SCHEDULED,
            scheduled_at=stamp,
            updated_at=stamp,
            patios_processed=0,
            patios_total=0,
            retry_count=0,
        )
        try:
            with self.Session.begin() as session:
                session.add(schedule)
        except IntegrityError:
            # Another worker inserted the date first; its row wins.
            logger.info("Schedule for %s was created concurrently", target_date)
            existing = self.get_schedule(target_date)
            if existing is None:
                raise
            return existing
        return schedule

    def try_start(self, target_date: date, patios_total: int, now: datetime | None = None) -> bool:
        """
        Atomically move the date's schedule from Scheduled to Running.

        Returns False when the schedule is missing or in any other status,
        which is how a second concurrent start is rejected.
        """
        stamp = _naive_utc(now or datetime.now(UTC))
        with self.Session.begin() as session:
            result = session.execute(
                update(PrecomputationScheduleRow)
                .where(
                    PrecomputationScheduleRow.target_date == target_date,
                    PrecomputationScheduleRow.status == PrecomputationStatus.SCHEDULED,
                )
                .values(
                    status=PrecomputationStatus.RUNNING,
                    started_at=stamp,
                    completed_at=None,
                    error_message=None,
                    patios_processed=0,
                    patios_total=patios_total,
                    updated_at=stamp,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def update_progress(self, target_date: date, patios_processed: int) -> None:
        self._update_schedule(target_date, patios_processed=patios_processed)

    def finish(
        self,
        target_date: date,
        status: PrecomputationStatus,
        patios_processed: int | None = None,
        now: datetime | None = None,
    ) -> None:
        values = {"status": status, "completed_at": _naive_utc(now or datetime.now(UTC))}
        if patios_processed is not None:
            values["patios_processed"] = patios_processed
        self._update_schedule(target_date, **values)

    def fail(self, target_date: date, error_message: str, now: datetime | None = None) -> None:
        stamp = _naive_utc(now or datetime.now(UTC))
        with self.Session.begin() as session:
            session.execute(
                update(PrecomputationScheduleRow)
                .where(PrecomputationScheduleRow.target_date == target_date)
                .values(
                    status=PrecomputationStatus.FAILED,
                    error_message=error_message[:2000],
                    retry_count=PrecomputationScheduleRow.retry_count + 1,
                    completed_at=stamp,
                    updated_at=stamp,
                )
                .execution_options(synchronize_session=False)
            )

    def requeue(self, target_date: date, max_retries: int) -> bool:
        """Failed -> Scheduled while retry_count < max_retries."""
        stamp = _naive_utc(datetime.now(UTC))
        with self.Session.begin() as session:
            result = session.execute(
                update(PrecomputationScheduleRow)
                .where(
                    PrecomputationScheduleRow.target_date == target_date,
                    PrecomputationScheduleRow.status == PrecomputationStatus.FAILED,
                    PrecomputationScheduleRow.retry_count < max_retries,
                )
                .values(status=PrecomputationStatus.SCHEDULED, updated_at=stamp)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def reschedule(self, target_date: date, now: datetime | None = None) -> bool:
        """
        Completed/Cancelled -> Scheduled so the date can run again.

        Running, Failed and Scheduled rows are left alone; a run in flight
        is never disturbed.
        """
        stamp = _naive_utc(now or datetime.now(UTC))
        with self.Session.begin() as session:
            result = session.execute(
                update(PrecomputationScheduleRow)
                .where(
                    PrecomputationScheduleRow.target_date == target_date,
                    PrecomputationScheduleRow.status.in_(
                        [PrecomputationStatus.COMPLETED, PrecomputationStatus.CANCELLED]
                    ),
                )
                .values(
                    status=PrecomputationStatus.SCHEDULED,
                    scheduled_at=stamp,
                    completed_at=None,
                    error_message=None,
                    updated_at=stamp,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def recent_schedules(self, days: int = 7, today: date | None = None) -> list[PrecomputationScheduleRow]:
        cutoff = (today or datetime.now(UTC).date()) - timedelta(days=days)
        with self.Session() as session:
            return list(
                session.scalars(
                    select(PrecomputationScheduleRow)
                    .where(PrecomputationScheduleRow.target_date >= cutoff)
                    .order_by(PrecomputationScheduleRow.target_date.desc())
                )
            )

    def schedules_by_status(self, status: PrecomputationStatus) -> list[PrecomputationScheduleRow]:
        with self.Session() as session:
            return list(
                session.scalars(
                    select(PrecomputationScheduleRow)
                    .where(PrecomputationScheduleRow.status == status)
                    .order_by(PrecomputationScheduleRow.target_date)
                )
            )

    # ---------- monitoring ----------

    def is_complete(self, target_date: date, threshold: float = COMPLETION_THRESHOLD) -> bool:
        schedule = self.get_schedule(target_date)
        if schedule is None or not schedule.patios_total:
            return False
        ratio = schedule.patios_processed / schedule.patios_total
        return ratio >= threshold and schedule.status == PrecomputationStatus.COMPLETED

    def metrics(self, target_date: date) -> PrecomputationMetrics | None:
        schedule = self.get_schedule(target_date)
        if schedule is None:
            return None
        with self.Session() as session:
            total_records, avg_ms = session.execute(
                select(func.count(), func.avg(PrecomputedSunExposureRow.calculation_ms)).where(
                    PrecomputedSunExposureRow.slot_date == target_date
                )
            ).one()

        error_rate = 0.0
        if schedule.patios_total:
            error_rate = 100.0 * (schedule.patios_total - schedule.patios_processed) / schedule.patios_total
        return PrecomputationMetrics(
            date=target_date,
            patios_processed=schedule.patios_processed,
            patios_total=schedule.patios_total,
            total_records=total_records or 0,
            total_duration=schedule.duration or timedelta(0),
            average_calculation_time=timedelta(milliseconds=float(avg_ms or 0.0)),
            error_rate=error_rate,
        )

    def freshness_info(self, now: datetime | None = None) -> DataFreshnessInfo:
        stamp = _naive_utc(now or datetime.now(UTC))
        row = PrecomputedSunExposureRow
        with self.Session() as session:
            total = session.scalar(select(func.count()).select_from(row)) or 0
            fresh = session.scalar(
                select(func.count()).select_from(row).where(row.is_stale.is_(False), row.expires_at > stamp)
            ) or 0
            stale = session.scalar(select(func.count()).select_from(row).where(row.is_stale.is_(True))) or 0
            expired = session.scalar(select(func.count()).select_from(row).where(row.expires_at <= stamp)) or 0
            oldest, newest = session.execute(select(func.min(row.computed_at), func.max(row.computed_at))).one()
        return DataFreshnessInfo(
            total_records=total,
            fresh_records=fresh,
            stale_records=stale,
            expired_records=expired,
            oldest_computed_at=oldest,
            newest_computed_at=newest,
        )

    def _update_schedule(self, target_date: date, **values) -> None:
        values["updated_at"] = _naive_utc(datetime.now(UTC))
        with self.Session.begin() as session:
            session.execute(
                update(PrecomputationScheduleRow)
                .where(PrecomputationScheduleRow.target_date == target_date)
                .values(**values)
                .execution_options(synchronize_session=False)
            )


def _naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def row_from_exposure(
    exposure: PatioSunExposure,
    computed_at: datetime,
    retention: timedelta = timedelta(days=3),
    version: str = "1.0",
) -> PrecomputedSunExposureRow:
    timestamp = _naive_utc(exposure.timestamp)
    local_time = exposure.local_time.replace(tzinfo=None)
    computed = _naive_utc(computed_at)
    return PrecomputedSunExposureRow(
        patio_id=exposure.patio_id,
        timestamp=timestamp,
        local_time=local_time,
        slot_date=local_time.date(),
        slot_time=local_time.time(),
        sun_exposure_percent=exposure.sun_exposure_percent,
        state=exposure.state,
        confidence=exposure.confidence,
        sunlit_area_m2=exposure.sunlit_area_m2,
        shaded_area_m2=exposure.shaded_area_m2,
        solar_elevation=exposure.solar_position.elevation,
        solar_azimuth=exposure.solar_position.azimuth,
        affecting_buildings_count=len(exposure.shadows),
        calculation_ms=exposure.calculation_duration.total_seconds() * 1000.0,
        computed_at=computed,
        expires_at=computed + retention,
        computation_version=version,
        is_stale=False,
    )
