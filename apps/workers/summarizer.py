# apps/workers/summarizer.py
#
# Plain-English rendering of a parsed METAR/TAF.
#
#   issued Jan-5-1250Z
#   Wind 240°T at 12kt gusting 22kt; Visibility 10km; Weather light rain;
#   Sky few 2000ft, broken 4500ft CB; Temp 8°C; Dewpoint 5°C; QNH 1013 hPa; VFR
#
# Each formatter appends "<clause>; " and the line is closed by _end(), which
# drops the trailing "; " and adds a newline. Numeric fields are read the way
# the upstream writes them ("10+", "-0.6", "VRB"), taking the leading number.
from __future__ import annotations

import re
from typing import List, Optional

from apps.scheduler.schedule import ReportKind
from apps.workers.reports import ParsedReport

# =====================================================================
# Tables
# =====================================================================

_MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

# checked in order, all matches are appended
_WX_CODES = [
    ("NSW", "no significant"),
    ("RA", "rain"),
    ("SN", "snow"),
    ("DZ", "drizzle"),
    ("FG", "fog"),
    ("BR", "mist"),
    ("HZ", "haze"),
    ("TS", "thunderstorm"),
    ("SH", "showers"),
    ("FZ", "freezing"),
    ("MI", "shallow"),
    ("BC", "patches"),
    ("PR", "partial"),
    ("DR", "drifting"),
    ("BL", "blowing"),
    ("PL", "ice pellets"),
    ("GR", "hail"),
    ("GS", "small hail"),
    ("SG", "snow grains"),
    ("IC", "ice crystals"),
    ("UP", "unknown precip"),
    ("VA", "volcanic ash"),
    ("DU", "dust"),
    ("SA", "sand"),
    ("PY", "spray"),
    ("PO", "dust whirls"),
    ("SQ", "squalls"),
    ("FC", "funnel cloud"),
    ("SS", "sandstorm"),
    ("DS", "duststorm"),
    ("VC", "in vicinity"),
]

# cover code -> (text, has_base)
_SKY_COVER = {
    "CLR": ("clear", False),
    "SKC": ("clear", False),
    "NCD": ("no cloud detected", False),
    "NSC": ("no significant cloud", False),
    "CAVOK": ("cavok", False),
    "VV": ("vertical visibility", True),
    "FEW": ("few", True),
    "SCT": ("scattered", True),
    "BKN": ("broken", True),
    "OVC": ("overcast", True),
}

_CHANGE = {"FM": "FROM", "BECMG": "BECOMING"}

_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_FLOAT_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+))")

M_PER_SM = 1609.34
HPA_PER_INHG = 33.8639


def _int(s: Optional[str]) -> int:
    m = _INT_RE.match(s or "")
    return int(m.group(1)) if m else 0


def _float(s: Optional[str]) -> float:
    m = _FLOAT_RE.match(s or "")
    return float(m.group(1)) if m else 0.0


# =====================================================================
# Clause formatters
# =====================================================================

def format_time(iso: Optional[str]) -> str:
    """'2025-01-05T12:50:00Z' -> 'Jan-5-1250Z'; '' when unparseable."""
    m = re.match(r"^\s*(\d+)-(\d+)-(\d+)T(\d+):(\d+)", iso or "")
    if not m:
        return ""
    mon = int(m.group(2))
    if not 1 <= mon <= 12:
        return ""
    return f"{_MONTHS[mon - 1]}-{int(m.group(3))}-{int(m.group(4)):02d}{int(m.group(5)):02d}Z"


def _wind(f: dict) -> str:
    dir_s, spd_s = f.get("wind_dir_degrees"), f.get("wind_speed_kt")
    if dir_s is None or spd_s is None:
        return ""
    spd = _int(spd_s)
    if spd == 0:
        return "Wind calm; "
    direction = _int(dir_s)
    if direction == 0 and spd > 0:
        out = f"Wind variable at {spd_s}kt"
    else:
        out = f"Wind {direction:03d}°T at {spd_s}kt"
    gust = f.get("wind_gust_kt")
    if gust:
        out += f" gusting {gust}kt"
    return out + "; "


def _visibility(f: dict) -> str:
    vis = f.get("visibility_statute_mi")
    if vis is None:
        return ""
    metres = _float(vis) * M_PER_SM
    if metres >= 5000:
        return f"Visibility {int(metres / 1000 + 0.5)}km; "
    return f"Visibility {int(metres / 100 + 0.5) * 100}m; "


def _weather(f: dict) -> str:
    wx = f.get("wx_string")
    if not wx:
        return ""
    words: List[str] = []
    if wx[0] == "-":
        words.append("light")
    if wx[0] == "+":
        words.append("heavy")
    words.extend(text for code, text in _WX_CODES if code in wx)
    return "Weather" + "".join(" " + w for w in words) + "; "


def _sky(f: dict, layers: List[dict]) -> str:
    vv = f.get("vert_vis_ft")
    if vv:
        return f"Sky obscured, vertical visibility {vv}ft; "
    parts: List[str] = []
    for layer in layers:
        cover = _SKY_COVER.get(layer.get("sky_cover") or "")
        if cover is None:
            continue
        text, has_base = cover
        base = layer.get("cloud_base_ft_agl")
        if base and has_base:
            text += f" {base}ft"
        if layer.get("cloud_type") in ("CB", "TCU"):
            text += " " + layer["cloud_type"]
        parts.append(text)
    if not parts:
        return ""
    return "Sky " + ", ".join(parts) + "; "


def _temperature(f: dict) -> str:
    out = ""
    if "temp_c" in f:
        out += f"Temp {_int(f['temp_c'])}°C; "
    if "dewpoint_c" in f:
        out += f"Dewpoint {_int(f['dewpoint_c'])}°C; "
    return out


def _pressure(f: dict) -> str:
    altim = f.get("altim_in_hg")
    if altim is None:
        return ""
    return f"QNH {int(0.5 + HPA_PER_INHG * _float(altim))} hPa; "


def _category(f: dict) -> str:
    cat = f.get("flight_category")
    return f"{cat}; " if cat else ""


def _forecast_period(f: dict) -> str:
    return f"{format_time(f.get('fcst_time_from'))}/{format_time(f.get('fcst_time_to'))} "


def _change(f: dict) -> str:
    ind = f.get("change_indicator")
    if not ind:
        return ""
    return _CHANGE.get(ind, ind) + " "


def _end(line: str) -> str:
    if len(line) > 2 and line.endswith("; "):
        line = line[:-2]
    return line + "\n"


# =====================================================================
# Public API
# =====================================================================

def _header_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    return name[0].upper() + name[1:]


def render_metar(report: ParsedReport, icao: str, name: Optional[str] = None, header: bool = False) -> str:
    issued = format_time(report.issued_iso)
    if header:
        title = _header_name(name)
        who = f"{title} ({icao})" if title else icao
        text = f"METAR for {who} issued {issued}\n"
    else:
        text = f"issued {issued}\n"

    f, line = report.fields, ""
    line += _wind(f)
    line += _visibility(f)
    line += _weather(f)
    line += _sky(f, report.sky)
    line += _temperature(f)
    line += _pressure(f)
    line += _category(f)
    return text + _end(line)


def render_taf(report: ParsedReport, icao: str, name: Optional[str] = None, header: bool = False) -> str:
    f = report.fields
    t1 = format_time(report.issued_iso)
    t2 = format_time(f.get("valid_time_from"))
    t3 = format_time(f.get("valid_time_to"))
    if header:
        title = _header_name(name)
        who = f"{title} ({icao})" if title else icao
        text = f"TAF for {who} issued {t1} valid {t2} to {t3}\n"
    else:
        text = f"issued {t1} valid {t2} to {t3}\n"

    for fc in report.forecasts:
        g = fc.fields
        line = _forecast_period(g) + _change(g)
        line += _wind(g)
        line += _visibility(g)
        line += _weather(g)
        line += _sky(g, fc.sky)
        text += _end(line)
    return text


def render(report: ParsedReport, icao: str, name: Optional[str] = None, header: bool = False) -> str:
    if report.kind == ReportKind.TAF:
        return render_taf(report, icao, name, header)
    return render_metar(report, icao, name, header)
