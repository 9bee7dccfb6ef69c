# apps/workers/reports.py
#
# Report parser: upstream XML bytes -> ParsedReport.
#
#   <response>
#     <data num_results="1">
#       <METAR>                       (or <TAF>)
#         <raw_text>…</raw_text>
#         <observation_time>2025-01-05T12:50:00Z</observation_time>
#         <wind_dir_degrees>240</wind_dir_degrees>
#         <sky_condition sky_cover="BKN" cloud_base_ft_agl="1200"/>
#         …
#         <forecast> … </forecast>    (TAF only, repeated)
#       </METAR>
#     </data>
#   </response>
#
# Only the first report element is used. A document without one, or bytes
# that are not XML at all, parse to None. A report without a parseable
# issuance time parses with issued == 0, which the scheduler treats as
# "nothing usable".

from __future__ import annotations

import calendar
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from apps.scheduler.schedule import ReportKind

log = logging.getLogger("avwpulse.reports")

# element holding the issuance time, per kind
ISSUED_FIELD = {
    ReportKind.METAR: "observation_time",
    ReportKind.TAF: "issue_time",
}

_ISO_RE = re.compile(r"^\s*(\d{4})-(\d{1,2})-(\d{1,2})T(\d{1,2}):(\d{1,2})(?::(\d{1,2}))?")


@dataclass
class ParsedReport:
    kind: ReportKind
    issued: int                       # epoch seconds; 0 = not found
    issued_iso: Optional[str] = None  # as published upstream
    raw: Optional[str] = None
    fields: Dict[str, str] = field(default_factory=dict)
    sky: List[Dict[str, str]] = field(default_factory=list)
    forecasts: List["ParsedReport"] = field(default_factory=list)


def parse_iso_time(iso: Optional[str]) -> int:
    """'2025-01-05T12:50:00Z' -> epoch seconds (UTC). 0 when unparseable."""
    if not iso:
        return 0
    m = _ISO_RE.match(iso)
    if not m:
        return 0
    year, mon, day, hour, minute = (int(m.group(i)) for i in range(1, 6))
    sec = int(m.group(6) or 0)
    try:
        return calendar.timegm((year, mon, day, hour, minute, sec, 0, 0, 0))
    except (OverflowError, ValueError):
        return 0


def _text(el: ET.Element) -> Optional[str]:
    t = el.text
    if t is None:
        return None
    t = t.strip()
    return t or None


def _collect(el: ET.Element, kind: ReportKind) -> ParsedReport:
    fields: Dict[str, str] = {}
    sky: List[Dict[str, str]] = []
    forecasts: List[ParsedReport] = []

    for child in el:
        if child.tag == "sky_condition":
            sky.append(dict(child.attrib))
        elif child.tag == "forecast":
            forecasts.append(_collect(child, kind))
        else:
            val = _text(child)
            if val is not None and child.tag not in fields:
                fields[child.tag] = val

    issued_iso = fields.get(ISSUED_FIELD[kind])
    return ParsedReport(
        kind=kind,
        issued=parse_iso_time(issued_iso),
        issued_iso=issued_iso,
        raw=fields.get("raw_text"),
        fields=fields,
        sky=sky,
        forecasts=forecasts,
    )


def parse_report(data: bytes, kind: ReportKind) -> Optional[ParsedReport]:
    """Parse one upstream document. None = no report element (or not XML)."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        log.warning("parse: %s document is not valid XML (%s)", kind.label, e)
        return None

    data_el = root.find("data")
    node = data_el.find(kind.label) if data_el is not None else None
    if node is None:
        return None

    report = _collect(node, kind)
    # forecast groups carry no issuance of their own
    for fc in report.forecasts:
        fc.issued = 0
        fc.issued_iso = None
    return report


def report_fields(report: ParsedReport, text: str) -> Dict[str, Any]:
    """The per-kind object placed in published envelopes."""
    out: Dict[str, Any] = {}
    key = "observed" if report.kind == ReportKind.METAR else "issued"
    if report.issued_iso:
        out[key] = report.issued_iso
    if report.raw:
        out["raw"] = report.raw
    out["text"] = text
    return out
