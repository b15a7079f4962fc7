from fastapi import APIRouter, Response

from medivault import database
from medivault.services.otp import get_otp_event_counters

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    return {"status": "healthy", "service": "medivault-api"}


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {"message": "Welcome to MediVault Access API", "docs": "/docs", "health": "/health"}


@router.get("/health/db")
async def database_health(response: Response):
    """Readiness probe: 503 until the database answers."""
    ok = await database.ping_db()
    if not ok:
        response.status_code = 503
    return {"ok": ok}


@router.get("/metrics")
async def metrics():
    """Prometheus-style counters of OTP outcomes in this process."""
    counters = get_otp_event_counters()
    lines = [
        "# HELP medivault_otp_events_total Count of OTP issue and verify outcomes.",
        "# TYPE medivault_otp_events_total counter",
    ]
    if counters:
        for event in sorted(counters):
            lines.append(f'medivault_otp_events_total{{event="{event}"}} {counters[event]}')
    else:
        lines.append('medivault_otp_events_total{event="none"} 0')
    body = "\n".join(lines) + "\n"
    return Response(body, media_type="text/plain; version=0.0.4")
