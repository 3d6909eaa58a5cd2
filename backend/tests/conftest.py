import os
import tempfile

# The module-level store opens its database on import; keep test runs out of backend/data.
os.environ.setdefault(
    "BOOKING_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="eve_booking_tests_"), "bookings.sqlite3"),
)
