import json
import logging
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from eve_booking.config import BOOKING_DB_PATH, BOOKING_SEED_DEMO
from eve_booking.errors import (
    BookingNotFoundError,
    BookingPermissionError,
    BookingStateError,
    BookingValidationError,
    PolicyViolationError,
    SlotConflictError,
)
from eve_booking.models import (
    CancellationResult,
    OccurrenceOutcome,
    PriceBreakdown,
    ProviderBlackout,
    ProviderBlackoutRequest,
    ProviderCalendarProfile,
    ProviderProfileUpsertRequest,
    QuoteRequest,
    RecurringSeries,
    Reservation,
    ReservationCreated,
    ReservationCreateRequest,
    ReservationInterval,
    SeriesCreationResult,
    ServiceAvailabilitySlot,
    ServiceOffering,
    ServiceOfferingCreateRequest,
    ServiceOfferingUpdateRequest,
    WeekdayHours,
)
from eve_booking.services.availability import (
    ACTIVE_RESERVATION_STATUSES,
    check_slot,
    mark_availability,
    parse_time_of_day,
)
from eve_booking.services.pricing import RECURRING_DISCOUNT_RATE, calculate_total, travel_fee_for
from eve_booking.services.recurrence import expand_occurrences, validate_recurrence
from eve_booking.services.refund_policy import evaluate_refund, policy_for
from eve_booking.services.slot_generator import (
    format_time_slot,
    generate_slots,
    resolve_weekly_hours,
    validate_calendar,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKING_DAYS = (0, 1, 2, 3, 4, 5)
RESERVATION_TERMINAL_STATUSES = {"completed", "cancelled"}

# Reasons from the availability filter that mean another booking or a blackout holds the time.
CONFLICT_REASONS = {"booked", "blackout"}

POLICY_MESSAGES = {
    "notice": "Appointment is inside the provider's minimum booking notice",
    "lookahead": "Appointment is beyond the provider's booking window",
    "closing": "Appointment would run past the provider's working hours",
}


def _dump_weekly_hours(week: List[WeekdayHours]) -> str:
    return json.dumps([hours.model_dump() for hours in week])


def _load_weekly_hours(raw: Any) -> List[WeekdayHours]:
    """Parse a stored week; an unreadable one comes back empty so the shared hours apply."""
    try:
        week = [WeekdayHours(**entry) for entry in json.loads(raw)]
    except (TypeError, ValueError):
        week = []
    if sorted(hours.day_of_week for hours in week) != list(range(7)):
        logger.warning("Invalid weekly_hours %r; using Monday to Saturday", raw)
        return []
    return week


@dataclass
class ReservationStore:
    db_path: str
    seed_demo: bool = False

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        if self.seed_demo:
            self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialise a read-check-write sequence against every other writer.

        BEGIN IMMEDIATE takes sqlite's reserved lock up front, so two
        connections (or processes) cannot both pass an overlap check before
        either has written.
        """
        with self._lock:
            with closing(self._connect()) as conn:
                conn.isolation_level = None
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            with closing(self._connect()) as conn:
                yield conn

    def _init_db(self) -> None:
        with self._lock:
            with closing(self._connect()) as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS provider_profiles (
                        provider_id TEXT PRIMARY KEY,
                        owner_user_id TEXT NOT NULL,
                        business_name TEXT NOT NULL DEFAULT '',
                        start_hour INTEGER NOT NULL,
                        end_hour INTEGER NOT NULL,
                        granularity_minutes INTEGER NOT NULL,
                        weekly_hours_json TEXT NOT NULL,
                        free_travel_radius_miles REAL NOT NULL,
                        travel_fee_per_mile INTEGER NOT NULL DEFAULT 0,
                        estimated_distance_miles REAL NOT NULL,
                        max_advance_days INTEGER NOT NULL,
                        min_notice_hours INTEGER NOT NULL,
                        cancellation_policy_class TEXT NOT NULL,
                        cancellation_notice_hours INTEGER NOT NULL,
                        late_fee_percent INTEGER NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_offerings (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        base_price INTEGER NOT NULL,
                        duration_minutes INTEGER NOT NULL,
                        active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS provider_blackouts (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        blackout_date TEXT NOT NULL,
                        start_time TEXT,
                        end_time TEXT,
                        reason TEXT NOT NULL,
                        created_by TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS reservations (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        service_offering_id TEXT NOT NULL,
                        customer_id TEXT NOT NULL,
                        booking_date TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        duration_minutes INTEGER NOT NULL,
                        status TEXT NOT NULL,
                        base_price INTEGER NOT NULL,
                        travel_fee INTEGER NOT NULL,
                        total_price INTEGER NOT NULL,
                        series_id TEXT,
                        occurrence_index INTEGER,
                        address TEXT NOT NULL,
                        notes TEXT NOT NULL,
                        payment_reference TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                # Backstop for the overlap check: two active bookings can never share a start.
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_active_start
                    ON reservations (provider_id, booking_date, start_time)
                    WHERE status IN ('pending', 'confirmed')
                    """
                )
                conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS ix_reservations_provider_date
                    ON reservations (provider_id, booking_date)
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS recurring_series (
                        id TEXT PRIMARY KEY,
                        anchor_reservation_id TEXT NOT NULL,
                        frequency TEXT NOT NULL,
                        occurrence_count INTEGER NOT NULL,
                        discount_rate REAL NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS reservation_status_history (
                        id TEXT PRIMARY KEY,
                        reservation_id TEXT NOT NULL,
                        actor_user_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.commit()

    def _seed_if_needed(self) -> None:
        seed_offerings = [
            ("off_blowout", "prov_demo", "Signature Blowout", 6500, 60),
            ("off_gel_mani", "prov_demo", "Gel Manicure", 4500, 45),
            ("off_bridal", "prov_demo", "Bridal Makeup", 15000, 120),
        ]
        demo_week = resolve_weekly_hours(ProviderCalendarProfile(provider_id="prov_demo", owner_user_id="provider_1"))
        now_iso = self._timestamp()
        with self._lock:
            with closing(self._connect()) as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO provider_profiles (
                        provider_id, owner_user_id, business_name, start_hour, end_hour, granularity_minutes,
                        weekly_hours_json, free_travel_radius_miles, travel_fee_per_mile, estimated_distance_miles,
                        max_advance_days, min_notice_hours, cancellation_policy_class, cancellation_notice_hours,
                        late_fee_percent, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        "prov_demo",
                        "provider_1",
                        "Glow Studio Mobile",
                        9,
                        19,
                        30,
                        _dump_weekly_hours(demo_week),
                        5.0,
                        0,
                        5.0,
                        30,
                        2,
                        "flexible",
                        24,
                        50,
                        now_iso,
                    ),
                )
                conn.executemany(
                    """
                    INSERT OR IGNORE INTO service_offerings (id, provider_id, name, base_price, duration_minutes, active, created_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    """,
                    [(*offering, now_iso) for offering in seed_offerings],
                )
                conn.commit()

    @staticmethod
    def _timestamp() -> str:
        return datetime.now().isoformat(timespec="seconds")

    def _parse_iso_date(self, value: str, *, field: str = "date") -> date:
        try:
            return date.fromisoformat(value)
        except (TypeError, ValueError) as exc:
            raise BookingValidationError(f"Invalid {field}; expected YYYY-MM-DD") from exc

    def _row_to_profile(self, row: sqlite3.Row) -> ProviderCalendarProfile:
        week = _load_weekly_hours(row["weekly_hours_json"])
        working_days = [hours.day_of_week for hours in week if hours.is_available] if week else list(DEFAULT_WORKING_DAYS)
        return ProviderCalendarProfile(
            provider_id=row["provider_id"],
            owner_user_id=row["owner_user_id"],
            business_name=row["business_name"],
            start_hour=row["start_hour"],
            end_hour=row["end_hour"],
            granularity_minutes=row["granularity_minutes"],
            working_days=working_days,
            weekly_hours=week,
            free_travel_radius_miles=row["free_travel_radius_miles"],
            travel_fee_per_mile=row["travel_fee_per_mile"],
            estimated_distance_miles=row["estimated_distance_miles"],
            max_advance_days=row["max_advance_days"],
            min_notice_hours=row["min_notice_hours"],
            cancellation_policy=policy_for(
                row["cancellation_policy_class"],
                notice_hours=row["cancellation_notice_hours"],
                late_fee_percent=row["late_fee_percent"],
            ),
        )

    def _row_to_offering(self, row: sqlite3.Row) -> ServiceOffering:
        return ServiceOffering(
            id=row["id"],
            provider_id=row["provider_id"],
            name=row["name"],
            base_price=row["base_price"],
            duration_minutes=row["duration_minutes"],
            active=bool(row["active"]),
        )

    def _row_to_blackout(self, row: sqlite3.Row) -> ProviderBlackout:
        return ProviderBlackout(
            id=row["id"],
            provider_id=row["provider_id"],
            date=row["blackout_date"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            reason=row["reason"],
        )

    def _row_to_reservation(self, row: sqlite3.Row) -> Reservation:
        return Reservation(
            id=row["id"],
            provider_id=row["provider_id"],
            service_offering_id=row["service_offering_id"],
            customer_id=row["customer_id"],
            date=row["booking_date"],
            start_time=row["start_time"],
            duration_minutes=row["duration_minutes"],
            status=row["status"],
            base_price=row["base_price"],
            travel_fee=row["travel_fee"],
            total_price=row["total_price"],
            series_id=row["series_id"],
            occurrence_index=row["occurrence_index"],
            address=row["address"],
            notes=row["notes"],
            payment_reference=row["payment_reference"],
            created_at=row["created_at"],
        )

    def _load_profile(self, conn: sqlite3.Connection, provider_id: str) -> ProviderCalendarProfile:
        row = conn.execute("SELECT * FROM provider_profiles WHERE provider_id = ?", (provider_id,)).fetchone()
        if not row:
            raise BookingNotFoundError("Provider not found")
        return self._row_to_profile(row)

    def _load_offering(self, conn: sqlite3.Connection, offering_id: str) -> ServiceOffering:
        row = conn.execute("SELECT * FROM service_offerings WHERE id = ?", (offering_id,)).fetchone()
        if not row:
            raise BookingNotFoundError("Service offering not found")
        return self._row_to_offering(row)

    def _load_reservation(self, conn: sqlite3.Connection, reservation_id: str) -> Reservation:
        row = conn.execute("SELECT * FROM reservations WHERE id = ?", (reservation_id,)).fetchone()
        if not row:
            raise BookingNotFoundError("Reservation not found")
        return self._row_to_reservation(row)

    def _bookable_offering(
        self, conn: sqlite3.Connection, provider_id: str, offering_id: str
    ) -> Tuple[ProviderCalendarProfile, ServiceOffering]:
        profile = self._load_profile(conn, provider_id)
        offering = self._load_offering(conn, offering_id)
        if offering.provider_id != provider_id:
            raise BookingValidationError("Service offering does not belong to this provider")
        if not offering.active:
            raise PolicyViolationError("Service offering is not currently bookable", reason="inactive")
        return profile, offering

    def _active_intervals(self, conn: sqlite3.Connection, provider_id: str, slot_date: str) -> List[ReservationInterval]:
        rows = conn.execute(
            """
            SELECT start_time, duration_minutes FROM reservations
            WHERE provider_id = ? AND booking_date = ? AND status IN (?, ?)
            ORDER BY start_time
            """,
            (provider_id, slot_date, *ACTIVE_RESERVATION_STATUSES),
        ).fetchall()
        return [ReservationInterval(start_time=row["start_time"], duration_minutes=row["duration_minutes"]) for row in rows]

    def _blackouts_for(
        self, conn: sqlite3.Connection, provider_id: str, slot_date: Optional[str] = None
    ) -> List[ProviderBlackout]:
        query = "SELECT * FROM provider_blackouts WHERE provider_id = ?"
        params: List[Any] = [provider_id]
        if slot_date:
            query += " AND blackout_date = ?"
            params.append(slot_date)
        query += " ORDER BY blackout_date, start_time"
        return [self._row_to_blackout(row) for row in conn.execute(query, tuple(params)).fetchall()]

    def _record_status(
        self,
        conn: sqlite3.Connection,
        reservation_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO reservation_status_history (id, reservation_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"rsh_{uuid4().hex[:10]}", reservation_id, actor_user_id, from_status, to_status, note, self._timestamp()),
        )

    def _assert_owner(self, profile: ProviderCalendarProfile, actor_user_id: str) -> None:
        if profile.owner_user_id != actor_user_id:
            raise BookingPermissionError("Only the provider owner can change this calendar")

    # Provider calendar settings

    def upsert_provider_profile(self, provider_id: str, request: ProviderProfileUpsertRequest) -> ProviderCalendarProfile:
        if len(request.working_days) != len(set(request.working_days)):
            raise BookingValidationError("working_days cannot contain duplicates")
        profile = ProviderCalendarProfile(
            provider_id=provider_id,
            owner_user_id=request.actor_user_id,
            business_name=request.business_name,
            start_hour=request.start_hour,
            end_hour=request.end_hour,
            granularity_minutes=request.granularity_minutes,
            working_days=sorted(request.working_days),
            weekly_hours=request.weekly_hours,
            free_travel_radius_miles=request.free_travel_radius_miles,
            travel_fee_per_mile=request.travel_fee_per_mile,
            estimated_distance_miles=request.estimated_distance_miles,
            max_advance_days=request.max_advance_days,
            min_notice_hours=request.min_notice_hours,
            cancellation_policy=policy_for(
                request.cancellation_policy_class,
                notice_hours=request.cancellation_notice_hours,
                late_fee_percent=request.late_fee_percent,
            ),
        )
        week = validate_calendar(profile)
        profile = profile.model_copy(
            update={
                "weekly_hours": week,
                "working_days": [hours.day_of_week for hours in week if hours.is_available],
            }
        )

        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT owner_user_id FROM provider_profiles WHERE provider_id = ?", (provider_id,)
            ).fetchone()
            if existing and existing["owner_user_id"] != request.actor_user_id:
                raise BookingPermissionError("Only the provider owner can change this calendar")
            policy = profile.cancellation_policy
            conn.execute(
                """
                INSERT INTO provider_profiles (
                    provider_id, owner_user_id, business_name, start_hour, end_hour, granularity_minutes,
                    weekly_hours_json, free_travel_radius_miles, travel_fee_per_mile, estimated_distance_miles,
                    max_advance_days, min_notice_hours, cancellation_policy_class, cancellation_notice_hours,
                    late_fee_percent, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider_id) DO UPDATE SET
                    business_name = excluded.business_name,
                    start_hour = excluded.start_hour,
                    end_hour = excluded.end_hour,
                    granularity_minutes = excluded.granularity_minutes,
                    weekly_hours_json = excluded.weekly_hours_json,
                    free_travel_radius_miles = excluded.free_travel_radius_miles,
                    travel_fee_per_mile = excluded.travel_fee_per_mile,
                    estimated_distance_miles = excluded.estimated_distance_miles,
                    max_advance_days = excluded.max_advance_days,
                    min_notice_hours = excluded.min_notice_hours,
                    cancellation_policy_class = excluded.cancellation_policy_class,
                    cancellation_notice_hours = excluded.cancellation_notice_hours,
                    late_fee_percent = excluded.late_fee_percent,
                    updated_at = excluded.updated_at
                """,
                (
                    profile.provider_id,
                    profile.owner_user_id,
                    profile.business_name,
                    profile.start_hour,
                    profile.end_hour,
                    profile.granularity_minutes,
                    _dump_weekly_hours(profile.weekly_hours),
                    profile.free_travel_radius_miles,
                    profile.travel_fee_per_mile,
                    profile.estimated_distance_miles,
                    profile.max_advance_days,
                    profile.min_notice_hours,
                    policy.policy_class,
                    policy.notice_hours,
                    policy.late_fee_percent,
                    self._timestamp(),
                ),
            )
        return profile

    def get_provider_profile(self, provider_id: str) -> ProviderCalendarProfile:
        with self._reader() as conn:
            return self._load_profile(conn, provider_id)

    def create_offering(self, provider_id: str, request: ServiceOfferingCreateRequest) -> ServiceOffering:
        name = request.name.strip()
        if not name:
            raise BookingValidationError("Service name is required")
        offering = ServiceOffering(
            id=f"off_{uuid4().hex[:8]}",
            provider_id=provider_id,
            name=name,
            base_price=request.base_price,
            duration_minutes=request.duration_minutes,
        )
        with self._transaction() as conn:
            self._assert_owner(self._load_profile(conn, provider_id), request.actor_user_id)
            conn.execute(
                """
                INSERT INTO service_offerings (id, provider_id, name, base_price, duration_minutes, active, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?)
                """,
                (offering.id, provider_id, offering.name, offering.base_price, offering.duration_minutes, self._timestamp()),
            )
        return offering

    def update_offering(self, offering_id: str, request: ServiceOfferingUpdateRequest) -> ServiceOffering:
        # Existing reservations keep their own price and duration snapshot.
        with self._transaction() as conn:
            current = self._load_offering(conn, offering_id)
            self._assert_owner(self._load_profile(conn, current.provider_id), request.actor_user_id)
            updates: Dict[str, Any] = {}
            if request.name is not None:
                if not request.name.strip():
                    raise BookingValidationError("Service name cannot be empty")
                updates["name"] = request.name.strip()
            if request.base_price is not None:
                updates["base_price"] = request.base_price
            if request.duration_minutes is not None:
                updates["duration_minutes"] = request.duration_minutes
            if request.active is not None:
                updates["active"] = request.active
            updated = current.model_copy(update=updates)
            conn.execute(
                "UPDATE service_offerings SET name = ?, base_price = ?, duration_minutes = ?, active = ? WHERE id = ?",
                (updated.name, updated.base_price, updated.duration_minutes, int(updated.active), offering_id),
            )
        return updated

    def get_offering(self, offering_id: str) -> ServiceOffering:
        with self._reader() as conn:
            return self._load_offering(conn, offering_id)

    def list_offerings(self, provider_id: str, include_inactive: bool = False) -> List[ServiceOffering]:
        query = "SELECT * FROM service_offerings WHERE provider_id = ?"
        if not include_inactive:
            query += " AND active = 1"
        with self._reader() as conn:
            rows = conn.execute(query + " ORDER BY name", (provider_id,)).fetchall()
        return [self._row_to_offering(row) for row in rows]

    def create_blackout(self, provider_id: str, request: ProviderBlackoutRequest) -> ProviderBlackout:
        blackout_date = self._parse_iso_date(request.date)
        start = parse_time_of_day(request.start_time, field="start_time") if request.start_time else None
        end = parse_time_of_day(request.end_time, field="end_time") if request.end_time else None
        if start and end and end <= start:
            raise BookingValidationError("Blackout must end after it starts")

        blackout = ProviderBlackout(
            id=f"blk_{uuid4().hex[:8]}",
            provider_id=provider_id,
            date=blackout_date.isoformat(),
            start_time=format_time_slot(start) if start else None,
            end_time=format_time_slot(end) if end else None,
            reason=request.reason,
        )
        with self._transaction() as conn:
            self._assert_owner(self._load_profile(conn, provider_id), request.actor_user_id)
            exists = conn.execute(
                """
                SELECT id FROM provider_blackouts
                WHERE provider_id = ? AND blackout_date = ? AND start_time IS ? AND end_time IS ?
                """,
                (provider_id, blackout.date, blackout.start_time, blackout.end_time),
            ).fetchone()
            if exists:
                raise SlotConflictError("Blackout already exists", reason="blackout")
            conn.execute(
                """
                INSERT INTO provider_blackouts (id, provider_id, blackout_date, start_time, end_time, reason, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    blackout.id,
                    provider_id,
                    blackout.date,
                    blackout.start_time,
                    blackout.end_time,
                    blackout.reason,
                    request.actor_user_id,
                    self._timestamp(),
                ),
            )
        return blackout

    def list_blackouts(self, provider_id: str, slot_date: Optional[str] = None) -> List[ProviderBlackout]:
        if slot_date:
            slot_date = self._parse_iso_date(slot_date).isoformat()
        with self._reader() as conn:
            return self._blackouts_for(conn, provider_id, slot_date)

    def delete_blackout(self, provider_id: str, blackout_id: str, actor_user_id: str) -> None:
        with self._transaction() as conn:
            self._assert_owner(self._load_profile(conn, provider_id), actor_user_id)
            deleted = conn.execute(
                "DELETE FROM provider_blackouts WHERE id = ? AND provider_id = ?", (blackout_id, provider_id)
            ).rowcount
            if not deleted:
                raise BookingNotFoundError("Blackout not found")

    # Availability and pricing

    def list_active_intervals(self, provider_id: str, slot_date: str) -> List[ReservationInterval]:
        normalized = self._parse_iso_date(slot_date).isoformat()
        with self._reader() as conn:
            self._load_profile(conn, provider_id)
            return self._active_intervals(conn, provider_id, normalized)

    def get_availability(
        self,
        provider_id: str,
        service_offering_id: str,
        slot_date: str,
        now: Optional[datetime] = None,
    ) -> List[ServiceAvailabilitySlot]:
        parsed_date = self._parse_iso_date(slot_date)
        with self._reader() as conn:
            profile, offering = self._bookable_offering(conn, provider_id, service_offering_id)
            existing = self._active_intervals(conn, provider_id, parsed_date.isoformat())
            blackouts = self._blackouts_for(conn, provider_id, parsed_date.isoformat())
        return mark_availability(
            generate_slots(profile, parsed_date),
            slot_date=parsed_date,
            duration_minutes=offering.duration_minutes,
            existing=existing,
            blackouts=blackouts,
            profile=profile,
            now=now or datetime.now(),
        )

    def booking_context(self, provider_id: str, service_offering_id: str) -> Tuple[ProviderCalendarProfile, ServiceOffering]:
        with self._reader() as conn:
            return self._bookable_offering(conn, provider_id, service_offering_id)

    def quote(self, request: QuoteRequest) -> PriceBreakdown:
        profile, offering = self.booking_context(request.provider_id, request.service_offering_id)
        return calculate_total(
            base_price=offering.base_price,
            travel_fee=travel_fee_for(profile, request.distance_miles),
            recurring=request.is_recurring,
        )

    # Reservations

    def _build_occurrence(
        self,
        *,
        profile: ProviderCalendarProfile,
        offering: ServiceOffering,
        request: ReservationCreateRequest,
        slot_date: date,
        start: time,
        travel_fee: int,
        series_id: Optional[str],
        occurrence_index: Optional[int],
    ) -> Reservation:
        if start not in generate_slots(profile, slot_date):
            raise PolicyViolationError(
                f"{format_time_slot(start)} on {slot_date.isoformat()} is not an offered slot",
                reason="unavailable",
            )

        price = calculate_total(offering.base_price, travel_fee, recurring=series_id is not None)
        return Reservation(
            id=f"res_{uuid4().hex[:10]}",
            provider_id=profile.provider_id,
            service_offering_id=offering.id,
            customer_id=request.customer_id,
            date=slot_date.isoformat(),
            start_time=format_time_slot(start),
            duration_minutes=offering.duration_minutes,
            status="pending",
            base_price=price.base_price,
            travel_fee=price.travel_fee,
            total_price=price.total_price,
            series_id=series_id,
            occurrence_index=occurrence_index,
            address=request.address.strip(),
            notes=request.notes,
            created_at=self._timestamp(),
        )

    def _insert_occurrence(
        self,
        conn: sqlite3.Connection,
        reservation: Reservation,
        *,
        profile: ProviderCalendarProfile,
        now: datetime,
    ) -> None:
        """Re-check the slot and insert it; must run inside ``_transaction``."""
        reason = check_slot(
            time.fromisoformat(reservation.start_time),
            slot_date=date.fromisoformat(reservation.date),
            duration_minutes=reservation.duration_minutes,
            existing=self._active_intervals(conn, profile.provider_id, reservation.date),
            blackouts=self._blackouts_for(conn, profile.provider_id, reservation.date),
            profile=profile,
            now=now,
        )
        if reason in CONFLICT_REASONS:
            logger.warning(
                "Slot conflict provider=%s date=%s start=%s reason=%s",
                profile.provider_id,
                reservation.date,
                reservation.start_time,
                reason,
            )
            raise SlotConflictError(reason=reason)
        if reason:
            raise PolicyViolationError(POLICY_MESSAGES[reason], reason=reason)

        try:
            conn.execute(
                """
                INSERT INTO reservations (
                    id, provider_id, service_offering_id, customer_id, booking_date, start_time, duration_minutes,
                    status, base_price, travel_fee, total_price, series_id, occurrence_index, address, notes,
                    payment_reference, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reservation.id,
                    reservation.provider_id,
                    reservation.service_offering_id,
                    reservation.customer_id,
                    reservation.date,
                    reservation.start_time,
                    reservation.duration_minutes,
                    reservation.status,
                    reservation.base_price,
                    reservation.travel_fee,
                    reservation.total_price,
                    reservation.series_id,
                    reservation.occurrence_index,
                    reservation.address,
                    reservation.notes,
                    None,
                    reservation.created_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            # Only the failed statement is undone; the surrounding transaction stays usable.
            raise SlotConflictError() from exc
        self._record_status(conn, reservation.id, reservation.customer_id, "none", "pending", "reservation requested")

    def _log_created(self, reservation: Reservation) -> None:
        logger.info(
            "Reservation created id=%s provider=%s date=%s start=%s total=%s",
            reservation.id,
            reservation.provider_id,
            reservation.date,
            reservation.start_time,
            reservation.total_price,
        )

    def create_reservation(self, request: ReservationCreateRequest, now: Optional[datetime] = None) -> ReservationCreated:
        if not request.address.strip():
            raise BookingValidationError("Address is required")
        slot_date = self._parse_iso_date(request.date)
        start = parse_time_of_day(request.start_time, field="start_time")
        if request.is_recurring:
            validate_recurrence(request.frequency, request.occurrence_count)
        now = now or datetime.now()

        profile, offering = self.booking_context(request.provider_id, request.service_offering_id)
        travel_fee = travel_fee_for(profile, request.distance_miles)

        if not request.is_recurring:
            reservation = self._build_occurrence(
                profile=profile,
                offering=offering,
                request=request,
                slot_date=slot_date,
                start=start,
                travel_fee=travel_fee,
                series_id=None,
                occurrence_index=None,
            )
            with self._transaction() as conn:
                self._insert_occurrence(conn, reservation, profile=profile, now=now)
            self._log_created(reservation)
            return ReservationCreated(
                reservation_id=reservation.id,
                total_price=reservation.total_price,
                travel_fee=reservation.travel_fee,
            )

        series = self._create_series(
            profile=profile,
            offering=offering,
            request=request,
            anchor=slot_date,
            start=start,
            travel_fee=travel_fee,
            now=now,
        )
        anchor = next(outcome for outcome in series.outcomes if outcome.status == "booked")
        return ReservationCreated(
            reservation_id=anchor.reservation_id,
            total_price=anchor.total_price,
            travel_fee=anchor.travel_fee,
            series=series,
        )


    def _create_series(
        self,
        *,
        profile: ProviderCalendarProfile,
        offering: ServiceOffering,
        request: ReservationCreateRequest,
        anchor: date,
        start: time,
        travel_fee: int,
        now: datetime,
    ) -> SeriesCreationResult:
        """Book every occurrence it can and record the series, all in one transaction.

        Each occurrence is checked on its own and a rejected one is reported,
        not retried; the series row commits together with its reservations.
        """
        series_id = f"ser_{uuid4().hex[:10]}"
        outcomes: List[OccurrenceOutcome] = []
        created: List[Reservation] = []
        with self._transaction() as conn:
            for index, occurrence_date in enumerate(
                expand_occurrences(anchor, request.frequency, request.occurrence_count)
            ):
                base_outcome = {
                    "occurrence_index": index,
                    "date": occurrence_date.isoformat(),
                    "start_time": format_time_slot(start),
                }
                try:
                    reservation = self._build_occurrence(
                        profile=profile,
                        offering=offering,
                        request=request,
                        slot_date=occurrence_date,
                        start=start,
                        travel_fee=travel_fee,
                        series_id=series_id,
                        occurrence_index=index,
                    )
                    self._insert_occurrence(conn, reservation, profile=profile, now=now)
                except SlotConflictError as exc:
                    outcomes.append(OccurrenceOutcome(status="conflict", reason=exc.reason, message=str(exc), **base_outcome))
                    continue
                except PolicyViolationError as exc:
                    outcomes.append(
                        OccurrenceOutcome(status="policy_violation", reason=exc.reason, message=str(exc), **base_outcome)
                    )
                    continue
                created.append(reservation)
                outcomes.append(
                    OccurrenceOutcome(
                        status="booked",
                        reservation_id=reservation.id,
                        total_price=reservation.total_price,
                        travel_fee=reservation.travel_fee,
                        **base_outcome,
                    )
                )

            if not created:
                raise SlotConflictError(
                    "No occurrence of the recurring series could be booked", reason="series", outcomes=outcomes
                )
            conn.execute(
                """
                INSERT INTO recurring_series (id, anchor_reservation_id, frequency, occurrence_count, discount_rate, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    series_id,
                    created[0].id,
                    request.frequency,
                    request.occurrence_count,
                    float(RECURRING_DISCOUNT_RATE),
                    self._timestamp(),
                ),
            )

        for reservation in created:
            self._log_created(reservation)
        if len(created) < len(outcomes):
            logger.warning(
                "Recurring series %s partially booked: %s of %s occurrences",
                series_id,
                len(created),
                len(outcomes),
            )
        return SeriesCreationResult(
            series_id=series_id,
            frequency=request.frequency,
            occurrence_count=request.occurrence_count,
            booked_count=len(created),
            outcomes=outcomes,
        )

    def get_reservation(self, reservation_id: str) -> Reservation:
        with self._reader() as conn:
            return self._load_reservation(conn, reservation_id)

    def list_reservations(
        self,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Reservation]:
        allowed_statuses = {None, "all", "pending", "confirmed", "completed", "cancelled"}
        if status not in allowed_statuses:
            raise BookingValidationError("Invalid status value. Allowed: all, pending, confirmed, completed, cancelled")

        query = "SELECT * FROM reservations WHERE 1 = 1"
        params: List[Any] = []
        if customer_id:
            query += " AND customer_id = ?"
            params.append(customer_id)
        if provider_id:
            query += " AND provider_id = ?"
            params.append(provider_id)
        if status and status != "all":
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY booking_date, start_time"
        with self._reader() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_reservation(row) for row in rows]

    def get_series(self, series_id: str) -> Tuple[RecurringSeries, List[Reservation]]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM recurring_series WHERE id = ?", (series_id,)).fetchone()
            if not row:
                raise BookingNotFoundError("Recurring series not found")
            members = conn.execute(
                "SELECT * FROM reservations WHERE series_id = ? ORDER BY occurrence_index", (series_id,)
            ).fetchall()
        series = RecurringSeries(
            id=row["id"],
            anchor_reservation_id=row["anchor_reservation_id"],
            frequency=row["frequency"],
            occurrence_count=row["occurrence_count"],
            discount_rate=row["discount_rate"],
            created_at=row["created_at"],
        )
        return series, [self._row_to_reservation(member) for member in members]

    def attach_payment(self, reservation_id: str, payment_reference: str) -> Reservation:
        payment_reference = payment_reference.strip()
        if not payment_reference:
            raise BookingValidationError("payment_reference is required")
        with self._transaction() as conn:
            reservation = self._load_reservation(conn, reservation_id)
            if reservation.status == "confirmed" and reservation.payment_reference == payment_reference:
                return reservation
            if reservation.status != "pending":
                raise BookingStateError(f"Cannot confirm a reservation that is {reservation.status}")
            conn.execute(
                "UPDATE reservations SET status = 'confirmed', payment_reference = ? WHERE id = ?",
                (payment_reference, reservation_id),
            )
            self._record_status(conn, reservation_id, "payment", "pending", "confirmed", "payment captured")
        logger.info("Reservation confirmed id=%s", reservation_id)
        return reservation.model_copy(update={"status": "confirmed", "payment_reference": payment_reference})

    def cancel_reservation(
        self,
        reservation_id: str,
        actor_user_id: str,
        cancelled_at: Optional[datetime] = None,
    ) -> CancellationResult:
        cancelled_at = cancelled_at or datetime.now()
        with self._transaction() as conn:
            reservation = self._load_reservation(conn, reservation_id)
            profile = self._load_profile(conn, reservation.provider_id)
            if actor_user_id not in {reservation.customer_id, profile.owner_user_id}:
                raise BookingPermissionError("Only the customer or the provider can cancel this reservation")
            if reservation.status in RESERVATION_TERMINAL_STATUSES:
                raise BookingStateError(f"Reservation is already {reservation.status}")

            appointment_start = datetime.combine(
                date.fromisoformat(reservation.date), time.fromisoformat(reservation.start_time)
            )
            # Nothing was captured for an unpaid reservation, so there is nothing to refund.
            paid_amount = reservation.total_price if reservation.payment_reference else 0
            refund = evaluate_refund(appointment_start, cancelled_at, profile.cancellation_policy, paid_amount)

            conn.execute("UPDATE reservations SET status = 'cancelled' WHERE id = ?", (reservation_id,))
            self._record_status(
                conn,
                reservation_id,
                actor_user_id,
                reservation.status,
                "cancelled",
                f"refund {refund.refund_percent}% ({refund.tier})",
            )
        logger.info(
            "Reservation cancelled id=%s by=%s refund_percent=%s",
            reservation_id,
            actor_user_id,
            refund.refund_percent,
        )
        return CancellationResult(reservation=reservation.model_copy(update={"status": "cancelled"}), refund=refund)

    def complete_past_reservations(self, now: Optional[datetime] = None) -> List[str]:
        now = now or datetime.now()
        completed: List[str] = []
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM reservations WHERE status = 'confirmed' AND booking_date <= ?",
                (now.date().isoformat(),),
            ).fetchall()
            for row in rows:
                reservation = self._row_to_reservation(row)
                ends_at = datetime.combine(
                    date.fromisoformat(reservation.date), time.fromisoformat(reservation.start_time)
                ) + timedelta(minutes=reservation.duration_minutes)
                if ends_at > now:
                    continue
                conn.execute("UPDATE reservations SET status = 'completed' WHERE id = ?", (reservation.id,))
                self._record_status(conn, reservation.id, "system", "confirmed", "completed", "appointment ended")
                completed.append(reservation.id)
        if completed:
            logger.info("Completed %s past reservations", len(completed))
        return completed


reservation_store = ReservationStore(db_path=BOOKING_DB_PATH, seed_demo=BOOKING_SEED_DEMO)
