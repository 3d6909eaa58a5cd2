from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from eve_booking.config import CORS_ORIGINS, TRUSTED_HOSTS
from eve_booking.routers import bookings, notifications, providers
from eve_booking.services.reservation_store import reservation_store

app = FastAPI(title="Eve Booking API", version="0.1.0")

allow_any_origin = len(CORS_ORIGINS) == 1 and CORS_ORIGINS[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not (len(TRUSTED_HOSTS) == 1 and TRUSTED_HOSTS[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=TRUSTED_HOSTS)

app.include_router(bookings.router)
app.include_router(providers.router)
app.include_router(notifications.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    return {
        "status": "ready",
        "database": reservation_store.db_path,
    }
