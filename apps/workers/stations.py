# apps/workers/stations.py
#
# Optional station metadata (name / country / IATA / position) keyed by ICAO.
#
# The file is a JS-style object literal, optionally wrapped in an assignment:
#
#   var stations = {
#     EGLL: { name: 'london heathrow', country: 'GB', iata: 'LHR', lat: 51.4706, lon: -0.4619, elev: 0.025 },
#     "KSFO": { "name": "san francisco intl", "lat": 37.619, "lon": -122.375 },
#     LFPG:{name:'paris charles de gaulle',lat:49.0097,lon:2.5479},
#   };
#
# Everything outside the outermost braces is ignored and the rest is read as
# a YAML flow mapping. Compact JS (`key:value`, no space) is accepted: a space
# is inserted after every colon that sits outside a quoted string. Missing or
# unreadable files are logged and skipped; station metadata only decorates
# published envelopes.

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml

log = logging.getLogger("avwpulse.stations")

KNOWN_KEYS = ("name", "country", "iata", "lat", "lon", "elev")

# a quoted string (kept as is) or a colon glued to its value
_QUOTED_OR_COLON = re.compile(r"""('[^']*'|"[^"]*")|:(?=\S)""")


@dataclass(frozen=True)
class Station:
    icao: str
    name: str = ""
    country: str = ""
    iata: str = ""
    lat: float = 0.0
    lon: float = 0.0
    elev: float = 0.0


def _str(v: Any) -> str:
    if v is None or isinstance(v, bool):
        return ""
    return str(v).strip()


def _num(v: Any) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return 0.0


def _space_colons(text: str) -> str:
    return _QUOTED_OR_COLON.sub(lambda m: m.group(1) or ": ", text)


def parse_stations(text: str) -> Dict[str, Station]:
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return {}

    data = yaml.safe_load(_space_colons(text[start:end + 1]))
    if not isinstance(data, dict):
        return {}

    out: Dict[str, Station] = {}
    for key, rec in data.items():
        icao = _str(key).upper()
        if not icao:
            continue
        if not isinstance(rec, dict):
            log.warning("stations: %s is not an object, skipped", icao)
            continue
        if not any(k in rec for k in KNOWN_KEYS):
            log.warning("stations: %s has none of %s", icao, ", ".join(KNOWN_KEYS))
        out[icao] = Station(
            icao=icao,
            name=_str(rec.get("name")),
            country=_str(rec.get("country")),
            iata=_str(rec.get("iata")),
            lat=_num(rec.get("lat")),
            lon=_num(rec.get("lon")),
            elev=_num(rec.get("elev")),
        )
    return out


def load_stations(path: Optional[str]) -> Dict[str, Station]:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        log.warning("stations: file cannot be opened: %s (%s)", path, e.strerror)
        return {}
    try:
        stations = parse_stations(text)
    except yaml.YAMLError as e:
        log.warning("stations: could not parse %s: %s", path, e)
        return {}
    log.debug("stations: parsed %d item(s)", len(stations))
    return stations
