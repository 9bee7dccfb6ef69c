# apps/api/app/main.py
#
# AVWPULSE STATUS API (read-only)
#
#   scheduler  → fetches METAR/TAF, decides what changed
#   publisher  → PUBLISH + SET <prefix>/<ICAO>[/<kind>], HSET <prefix>:schedule
#
#   api (THIS FILE)
#     * ONLY reads what the publisher retained in Redis
#     * NEVER fetches upstream, NEVER publishes
#
#   GET /healthz                      → {ok, redis}
#   GET /v1/airports                  → ICAO codes with a retained payload
#   GET /v1/airports/{icao}[?kind=]   → latest combined (or per-kind) envelope
#   GET /v1/schedules                 → scheduler state per airport/kind

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import redis
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from apps.api.app.config import settings

SCHEDULE_SUFFIX = ":schedule"
KINDS = ("metar", "taf")

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Process-wide client, created on first use."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
    return _redis_client


# -----------------------------------------------------------------------------
# Pydantic response models
# -----------------------------------------------------------------------------

class KindSchedule(BaseModel):
    kind: str
    samples: List[int] = []
    learned_period: int = 0
    last_issued: int = 0
    next_fetch: int = 0


class AirportSchedule(BaseModel):
    icao: str
    last_fetch: int = 0
    kinds: List[KindSchedule] = []


class AirportsResponse(BaseModel):
    items: List[str]


class SchedulesResponse(BaseModel):
    items: List[AirportSchedule]


class ErrorBody(BaseModel):
    ok: bool = False
    status: int
    error: str
    message: str


app = FastAPI(
    title="avwpulse API",
    version="1.0.0",
    description=(
        "Read-only view of the aviation weather relay.\n"
        "Payloads are exactly what the scheduler last published; "
        "schedule snapshots show what it has learned per airport."
    ),
)


# -----------------------------------------------------------------------------
# Error handlers
# -----------------------------------------------------------------------------

def _json_error(status_code: int, err: str, msg: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(status=status_code, error=err, message=msg).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exc_handler(_: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else json.dumps(exc.detail)
    return _json_error(exc.status_code, "http_error", detail)


# -----------------------------------------------------------------------------
# helpers
# -----------------------------------------------------------------------------

def _prefix() -> str:
    return settings.topic_prefix.rstrip("/")


def _unavailable(e: Exception) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Redis unavailable: {type(e).__name__}")


def _load_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        obj = json.loads(raw)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


# -----------------------------------------------------------------------------
# routes
# -----------------------------------------------------------------------------

@app.get("/healthz")
def healthz(r: redis.Redis = Depends(get_redis)):
    try:
        ok = bool(r.ping())
    except redis.RedisError:
        ok = False
    return {"ok": True, "redis": ok}


@app.get("/v1/airports", response_model=AirportsResponse)
def airports(r: redis.Redis = Depends(get_redis)):
    prefix = _prefix() + "/"
    found: set[str] = set()
    try:
        for n, key in enumerate(r.scan_iter(match=prefix + "*", count=100)):
            if n >= settings.max_scan:
                break
            rest = key[len(prefix):]
            icao = rest.split("/", 1)[0]
            if icao:
                found.add(icao)
    except redis.RedisError as e:
        raise _unavailable(e) from e
    return AirportsResponse(items=sorted(found))


@app.get("/v1/airports/{icao}")
def airport_latest(
    icao: str,
    kind: Optional[str] = Query(None, pattern="^(metar|taf)$"),
    r: redis.Redis = Depends(get_redis),
):
    key = f"{_prefix()}/{icao.strip().upper()}"
    if kind:
        key += f"/{kind}"
    try:
        payload = _load_json(r.get(key))
    except redis.RedisError as e:
        raise _unavailable(e) from e
    if payload is None:
        raise HTTPException(status_code=404, detail=f"No payload retained for {key}")
    return payload


@app.get("/v1/schedules", response_model=SchedulesResponse)
def schedules(r: redis.Redis = Depends(get_redis)):
    try:
        raw = r.hgetall(_prefix() + SCHEDULE_SUFFIX)
    except redis.RedisError as e:
        raise _unavailable(e) from e

    items: List[AirportSchedule] = []
    for icao in sorted(raw):
        snap = _load_json(raw[icao])
        if snap is None:
            continue
        kinds = [
            KindSchedule(**k) for k in snap.get("kinds", [])
            if isinstance(k, dict) and k.get("kind") in KINDS
        ]
        items.append(AirportSchedule(icao=icao, last_fetch=int(snap.get("last_fetch") or 0), kinds=kinds))
    return SchedulesResponse(items=items)


@app.get("/")
def root():
    """Basic ping."""
    return {"ok": True, "service": "avwpulse-api", "env": settings.env, "version": "1.0.0"}
