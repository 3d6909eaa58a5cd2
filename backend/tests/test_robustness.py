import importlib
import json
import os
import sqlite3
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from eve_booking.models import ReservationCreateRequest
from eve_booking.services.notification_store import INBOX_LIMIT, NotificationStore
from eve_booking.services.reservation_store import ReservationStore

NOW = datetime(2025, 6, 1, 8, 0)


def _reload_config():
    sys.modules.pop("eve_booking.config", None)
    return importlib.import_module("eve_booking.config")


def test_default_granularity_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("BOOKING_DEFAULT_GRANULARITY_MINUTES", "not-a-number")
    config = _reload_config()
    assert config.DEFAULT_GRANULARITY_MINUTES == 30


def test_default_lookahead_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("BOOKING_DEFAULT_MAX_ADVANCE_DAYS", "0")
    config = _reload_config()
    assert config.DEFAULT_MAX_ADVANCE_DAYS == 30


def test_default_notice_accepts_zero_but_not_negative(monkeypatch):
    monkeypatch.setenv("BOOKING_DEFAULT_MIN_NOTICE_HOURS", "0")
    assert _reload_config().DEFAULT_MIN_NOTICE_HOURS == 0
    monkeypatch.setenv("BOOKING_DEFAULT_MIN_NOTICE_HOURS", "-3")
    assert _reload_config().DEFAULT_MIN_NOTICE_HOURS == 2


def test_booking_timezone_env(monkeypatch):
    monkeypatch.setenv("BOOKING_TIMEZONE", "Europe/London")
    assert _reload_config().BOOKING_TIMEZONE.key == "Europe/London"
    monkeypatch.setenv("BOOKING_TIMEZONE", "Mars/Olympus_Mons")
    assert _reload_config().BOOKING_TIMEZONE is None


def test_csv_and_bool_env_parsing(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", " https://a.example , ,https://b.example")
    monkeypatch.setenv("BOOKING_SEED_DEMO", "off")
    config = _reload_config()
    assert config.CORS_ORIGINS == ["https://a.example", "https://b.example"]
    assert config.BOOKING_SEED_DEMO is False


def test_store_handles_invalid_weekly_hours_json(tmp_path):
    db_path = tmp_path / "bookings.sqlite3"
    store = ReservationStore(db_path=str(db_path), seed_demo=True)
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute("UPDATE provider_profiles SET weekly_hours_json = ? WHERE provider_id = ?", ("{bad", "prov_demo"))
        conn.commit()

    profile = store.get_provider_profile("prov_demo")
    assert profile.working_days == [0, 1, 2, 3, 4, 5]

    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            "UPDATE provider_profiles SET weekly_hours_json = ? WHERE provider_id = ?",
            (json.dumps([1, 9]), "prov_demo"),
        )
        conn.commit()
    assert store.get_provider_profile("prov_demo").working_days == [0, 1, 2, 3, 4, 5]
    assert store.get_provider_profile("prov_demo").weekly_hours == []


def test_seed_is_idempotent(tmp_path):
    db_path = str(tmp_path / "bookings.sqlite3")
    ReservationStore(db_path=db_path, seed_demo=True)
    store = ReservationStore(db_path=db_path, seed_demo=True)
    assert len(store.list_offerings("prov_demo")) == 3


def test_unique_index_backs_the_overlap_check(tmp_path):
    db_path = tmp_path / "bookings.sqlite3"
    ReservationStore(db_path=str(db_path), seed_demo=True)
    row = (
        "prov_demo", "off_blowout", "cust_1", "2025-06-02", "10:00", 60, "pending",
        6500, 0, 6500, None, None, "1 Lane", "", None, "2025-06-01T08:00:00",
    )
    with sqlite3.connect(str(db_path)) as conn:
        insert = """
            INSERT INTO reservations (
                id, provider_id, service_offering_id, customer_id, booking_date, start_time, duration_minutes,
                status, base_price, travel_fee, total_price, series_id, occurrence_index, address, notes,
                payment_reference, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        conn.execute(insert, ("res_a", *row))
        try:
            conn.execute(insert, ("res_b", *row))
            duplicated = True
        except sqlite3.IntegrityError:
            duplicated = False
        cancelled = list(row)
        cancelled[6] = "cancelled"
        conn.execute(insert, ("res_c", *cancelled))
        conn.commit()
    assert duplicated is False


def test_failed_series_write_leaves_no_orphan_reservations(tmp_path):
    db_path = tmp_path / "bookings.sqlite3"
    store = ReservationStore(db_path=str(db_path), seed_demo=True)
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute("DROP TABLE recurring_series")
        conn.commit()

    request = ReservationCreateRequest(
        provider_id="prov_demo",
        service_offering_id="off_blowout",
        customer_id="cust_series",
        date="2025-06-02",
        start_time="10:00",
        address="1 Lane",
        is_recurring=True,
        frequency="weekly",
        occurrence_count=2,
    )
    with pytest.raises(sqlite3.OperationalError):
        store.create_reservation(request, now=NOW)
    assert store.list_reservations(customer_id="cust_series") == []
    assert store.list_active_intervals("prov_demo", "2025-06-02") == []


def test_notification_inbox_is_capped():
    store = NotificationStore()
    for index in range(INBOX_LIMIT + 5):
        store.create(user_id="u1", title=f"n{index}", body="", category="booking")
    rows = store.list_for_user("u1")
    assert len(rows) == INBOX_LIMIT
    assert rows[0].title == f"n{INBOX_LIMIT + 4}"
    assert store.mark_read("u2", rows[0].id) is None


def test_complete_past_bookings_script(tmp_path):
    scripts_dir = os.path.join(os.path.dirname(os.path.dirname(__file__)), "scripts")
    sys.path.insert(0, scripts_dir)
    complete_past_bookings = importlib.import_module("complete_past_bookings")

    db_path = str(tmp_path / "bookings.sqlite3")
    store = ReservationStore(db_path=db_path, seed_demo=True)
    created = store.create_reservation(
        ReservationCreateRequest(
            provider_id="prov_demo",
            service_offering_id="off_blowout",
            customer_id="cust_1",
            date="2025-06-02",
            start_time="10:00",
            address="1 Lane",
        ),
        now=NOW,
    )
    store.attach_payment(created.reservation_id, "pay_1")

    report = complete_past_bookings.run(db_path, datetime(2025, 6, 3, 0, 0))
    assert report["completed_count"] == 1
    assert report["completed_reservation_ids"] == [created.reservation_id]
    assert store.get_reservation(created.reservation_id).status == "completed"
