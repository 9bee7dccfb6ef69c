# apps/sanitizer/publisher.py
#
# ROLE IN PIPELINE:
#
#   scheduler  → decides WHEN to fetch each airport/kind and WHETHER the
#                fetched report is new (apps/scheduler/schedule.py)
#
#   publisher  → THIS FILE, the only writer to the sink:
#                 * builds the JSON envelope for an airport
#                 * split mode:    one message per forwarded kind
#                                  <prefix>/<ICAO>/metar, <prefix>/<ICAO>/taf
#                 * combined mode: one message per pass with every known kind
#                                  <prefix>/<ICAO>
#                 * Redis PUBLISH <topic> <payload>           (live subscribers)
#                 * Redis SET     <topic> <payload>           (retained latest)
#                 * Redis HSET    <prefix>:schedule <ICAO>    (scheduler snapshot)
#
#   api        → reads the retained keys + schedule hash (apps/api/app/main.py)
#
# ENVELOPE:
#   {
#     "timestamp": "2025-01-05T12:53:10Z",          (pass start, UTC)
#     "airport": {"icao": "EGLL", "name": "london heathrow", "lat": .., "lon": ..,
#                 "elev_km": .., "country": "GB", "iata": "LHR"},
#     "metar": {"observed": "2025-01-05T12:50:00Z", "raw": "…", "text": "…"},
#     "taf":   {"issued": "2025-01-05T11:00:00Z", "raw": "…", "text": "…"}
#   }
#
# Publishing is at-least-once and best-effort: a failed publish is logged and
# reported as False, never raised. The scheduler does not roll back.

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from apps.scheduler.schedule import ReportKind
from apps.workers.stations import Station

log = logging.getLogger("avwpulse.publisher")

SCHEDULE_SUFFIX = ":schedule"


# =============================================================================
# Envelope shaping
# =============================================================================

def utc_stamp(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def airport_json(icao: str, station: Optional[Station] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"icao": icao}
    if station is None:
        return out
    if station.name:
        out["name"] = station.name
        out["lat"] = station.lat
        out["lon"] = station.lon
        out["elev_km"] = station.elev
    if station.country:
        out["country"] = station.country
    if station.iata:
        out["iata"] = station.iata
    return out


def topic_for(prefix: str, icao: str, kind: Optional[ReportKind] = None) -> str:
    topic = f"{prefix}/{icao}"
    return f"{topic}/{kind.value}" if kind else topic


def build_messages(
    prefix: str,
    airport: Dict[str, Any],
    timestamp: str,
    forwarded: Mapping[ReportKind, Dict[str, Any]],
    latest: Mapping[ReportKind, Dict[str, Any]],
    split: bool,
) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Turn one pass over an airport into (topic, envelope) pairs.

    `forwarded` holds the reports the scheduler marked for forwarding this
    pass; `latest` the last known report per kind (used by combined mode so
    an envelope never drops the kind that was not due this time).
    """
    if not forwarded:
        return []

    if split:
        return [
            (
                topic_for(prefix, airport["icao"], kind),
                {"timestamp": timestamp, "airport": airport, kind.value: report},
            )
            for kind, report in sorted(forwarded.items(), key=lambda kv: kv[0].value)
        ]

    envelope: Dict[str, Any] = {"timestamp": timestamp, "airport": airport}
    for kind in (ReportKind.METAR, ReportKind.TAF):
        report = forwarded.get(kind) or latest.get(kind)
        if report:
            envelope[kind.value] = report
    return [(topic_for(prefix, airport["icao"]), envelope)]


def encode(envelope: Dict[str, Any]) -> bytes:
    return json.dumps(envelope, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


# =============================================================================
# Redis sink
# =============================================================================

class RedisPublisher:
    """
    Shared sink client. redis.asyncio pools connections, so concurrent
    publish() calls from different airport tasks are safe.
    """

    def __init__(
        self,
        url: str,
        topic_prefix: str,
        client_id: str = "avwpulse",
        username: Optional[str] = None,
        password: Optional[str] = None,
        retain: bool = True,
        conn: Optional[AsyncRedis] = None,
    ):
        self.topic_prefix = topic_prefix.rstrip("/")
        self.retain = retain
        kwargs: Dict[str, Any] = {"client_name": client_id}
        if username:
            kwargs["username"] = username
        if password:
            kwargs["password"] = password
        self._conn = conn if conn is not None else AsyncRedis.from_url(url, **kwargs)

    @property
    def schedule_key(self) -> str:
        return self.topic_prefix + SCHEDULE_SUFFIX

    async def ping(self) -> None:
        """Raises RedisError when the broker is unreachable."""
        await self._conn.ping()

    async def publish(self, topic: str, payload: bytes) -> bool:
        try:
            receivers = await self._conn.publish(topic, payload)
            if self.retain:
                await self._conn.set(topic, payload)
        except RedisError as e:
            log.error("publish: %s failed: %s", topic, e)
            return False
        log.info("publish: %s (%d bytes, %s subscriber(s))", topic, len(payload), receivers)
        return True

    async def publish_schedule(self, icao: str, snapshot: Dict[str, Any]) -> None:
        try:
            await self._conn.hset(self.schedule_key, icao, json.dumps(snapshot))
        except RedisError as e:
            log.warning("schedule snapshot for %s not stored: %s", icao, e)

    async def aclose(self) -> None:
        await self._conn.aclose()
