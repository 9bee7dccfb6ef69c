# apps/scheduler/main.py
#
# ─────────────────────────────────────────────────────────────────────
# SCHEDULER ROLE (this process = the "avwpulse" relay)
# ─────────────────────────────────────────────────────────────────────
#
# FULL PIPELINE, per airport (a "feed"), per report kind:
#
#   1. poll loop (THIS FILE)
#        - ticks every scheduler.tick_seconds (default 5s)
#        - decides WHICH feeds/kinds are due this tick
#        - dispatches one asyncio task per due feed
#
#   2. fetch + parse
#        - apps.workers.fetcher.Fetcher      (httpx, bounded timeout)
#        - apps.workers.reports.parse_report (XML -> ParsedReport)
#
#   3. decide
#        - apps.scheduler.schedule.observe()
#            • new issuance?        → forward
#            • learns the cadence   → next_fetch just after the next issuance
#
#   4. publish
#        - apps.workers.summarizer.render()          (plain-English text)
#        - apps.sanitizer.publisher.build_messages() (split / combined)
#        - RedisPublisher.publish() + publish_schedule()
#
# HARD GUARANTEES:
#   - a kind is NEVER dispatched while its previous fetch is still running.
#   - only this file mutates ScheduleState (one task per feed at a time).
#   - one broken feed NEVER kills the loop; its task logs and moves on.
#   - after SIGINT/SIGTERM nothing new is fetched and nothing is published.
#
# MODES (-a / -l / --no-learn):
#
#   change detection (default) : due = per-kind next_fetch, forward new issuances
#   change detection, no learn : due = fixed interval,      forward new issuances
#   forward all (-a)           : due = fixed interval,      forward everything
#   forward all + learn (-a -l): as above, cadence bookkeeping still runs
#
# If --once is given → run one pass and exit (useful for testing).

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from redis.exceptions import RedisError

from apps.sanitizer.publisher import (
    RedisPublisher,
    airport_json,
    build_messages,
    encode,
    utc_stamp,
)
from apps.scheduler.config import AppConfig, ConfigError, Settings, load_config
from apps.scheduler.schedule import (
    ReportKind,
    ScheduleState,
    new_state,
    observe,
    should_fetch,
)
from apps.workers.fetcher import Fetcher
from apps.workers.reports import ParsedReport, parse_report, report_fields
from apps.workers.stations import Station, load_stations
from apps.workers.summarizer import render

log = logging.getLogger("avwpulse.scheduler")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def wall_clock() -> int:
    return int(time.time())


# -------------------------------------------------------------------
# runtime options / feeds
# -------------------------------------------------------------------

@dataclass(frozen=True)
class RunOptions:
    forward_all: bool = False  # -a
    learn: bool = True         # -l / --no-learn
    split: bool = False        # -s
    header: bool = False       # -H

    @property
    def fixed_interval(self) -> bool:
        """Due-ness from the feed's interval instead of per-kind next_fetch."""
        return self.forward_all or not self.learn


@dataclass
class Feed:
    icao: str
    kinds: List[ReportKind]
    interval_minutes: int
    states: Dict[ReportKind, ScheduleState]
    station: Optional[Station] = None
    last_fetch: int = 0

    # last rendered report per kind (combined envelopes carry all of them)
    latest: Dict[ReportKind, Dict[str, Any]] = field(default_factory=dict)
    # epoch of the last failed attempt per kind
    last_failure: Dict[ReportKind, int] = field(default_factory=dict)
    in_flight: Set[ReportKind] = field(default_factory=set)

    @property
    def tag(self) -> str:
        return f"[{self.icao}]"

    def snapshot(self) -> Dict[str, Any]:
        return {
            "icao": self.icao,
            "last_fetch": self.last_fetch,
            "kinds": [self.states[k].snapshot() for k in self.kinds],
        }


def build_feeds(cfg: AppConfig, stations: Optional[Mapping[str, Station]] = None) -> Dict[str, Feed]:
    stations = stations or {}
    feeds: Dict[str, Feed] = {}
    for ap in cfg.airports:
        kinds: List[ReportKind] = []
        if ap.fetch_metar:
            kinds.append(ReportKind.METAR)
        if ap.fetch_taf:
            kinds.append(ReportKind.TAF)
        if not kinds:
            log.warning("[%s] neither METAR nor TAF enabled, skipping", ap.icao)
            continue
        station = stations.get(ap.icao)
        if stations and station is None:
            log.info("[%s] no station metadata", ap.icao)
        feeds[ap.icao] = Feed(
            icao=ap.icao,
            kinds=kinds,
            interval_minutes=ap.interval_minutes,
            states={k: new_state(k) for k in kinds},
            station=station,
        )
    return feeds


# -------------------------------------------------------------------
# poll loop
# -------------------------------------------------------------------

class Poller:
    """
    Owns every Feed and drives them from one coordinating loop.

    fetcher:   async fetch(url) -> bytes | None
    publisher: async publish(topic, payload) -> bool,
               async publish_schedule(icao, snapshot)
    clock:     () -> int epoch seconds
    """

    def __init__(
        self,
        feeds: Dict[str, Feed],
        options: RunOptions,
        fetcher: Any,
        publisher: Any,
        urls: Mapping[ReportKind, str],
        topic_prefix: str = "weather/aviation",
        clock: Callable[[], int] = wall_clock,
        parser: Callable[[bytes, ReportKind], Optional[ParsedReport]] = parse_report,
        tick_seconds: float = 5.0,
        shutdown_grace_seconds: float = 10.0,
        failure_retry_seconds: int = 0,
    ):
        self.feeds = feeds
        self.options = options
        self.fetcher = fetcher
        self.publisher = publisher
        self.urls = dict(urls)
        self.topic_prefix = topic_prefix.rstrip("/")
        self.clock = clock
        self.parser = parser
        self.tick_seconds = tick_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.failure_retry_seconds = failure_retry_seconds

        self._stopping = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    # ---- due-ness ------------------------------------------------

    def due_kinds(self, feed: Feed, now: int) -> List[ReportKind]:
        if self.options.fixed_interval:
            if feed.last_fetch and now - feed.last_fetch < feed.interval_minutes * 60:
                return []
            candidates: Iterable[ReportKind] = feed.kinds
        else:
            candidates = [k for k in feed.kinds if should_fetch(feed.states[k], now)]

        due: List[ReportKind] = []
        for kind in candidates:
            if kind in feed.in_flight:
                continue
            failed = feed.last_failure.get(kind)
            if failed and self.failure_retry_seconds and now - failed < self.failure_retry_seconds:
                continue
            due.append(kind)
        return due

    # ---- one feed ------------------------------------------------

    async def _fetch_kind(self, feed: Feed, kind: ReportKind) -> Optional[ParsedReport]:
        url = self.urls[kind].format(icao=feed.icao)
        data = await self.fetcher.fetch(url)
        if data is None:
            return None
        report = self.parser(data, kind)
        if report is None:
            log.warning("%s %s: no report in response", feed.tag, kind.label)
        elif not report.issued:
            log.warning("%s %s: report has no usable issuance time", feed.tag, kind.label)
        return report

    async def poll_feed(self, feed: Feed, kinds: List[ReportKind], started: int) -> int:
        """
        Fetch the due kinds of one feed, run them through the change detector
        and publish whatever it forwards. Returns the number of messages
        published.
        """
        results = await asyncio.gather(*(self._fetch_kind(feed, k) for k in kinds))

        name = feed.station.name if feed.station else None
        forwarded: Dict[ReportKind, Dict[str, Any]] = {}
        for kind, report in zip(kinds, results):
            now = self.clock()
            if report is None or not report.issued:
                feed.last_failure[kind] = now
                continue
            feed.last_failure.pop(kind, None)

            obs = observe(
                feed.states[kind],
                report.issued,
                now,
                feed.interval_minutes,
                forward_all=self.options.forward_all,
                learn=self.options.learn,
                tag=feed.tag,
            )
            if not obs.forward:
                continue

            text = render(report, feed.icao, name, self.options.header)
            log.debug("%s %s raw: %s", feed.tag, kind.label, report.raw)
            log.debug("%s %s text:\n%s", feed.tag, kind.label, text.rstrip())
            fields = report_fields(report, text)
            feed.latest[kind] = fields
            forwarded[kind] = fields

        feed.last_fetch = self.clock()

        if self._stopping.is_set():
            log.info("%s shutdown requested, not publishing", feed.tag)
            return 0

        published = 0
        messages = build_messages(
            self.topic_prefix,
            airport_json(feed.icao, feed.station),
            utc_stamp(started),
            forwarded,
            feed.latest,
            self.options.split,
        )
        for topic, envelope in messages:
            if await self.publisher.publish(topic, encode(envelope)):
                published += 1
        await self.publisher.publish_schedule(feed.icao, feed.snapshot())
        return published

    async def _run_feed(self, feed: Feed, kinds: List[ReportKind], started: int) -> None:
        try:
            await self.poll_feed(feed, kinds, started)
        except asyncio.CancelledError:
            log.warning("%s poll cancelled", feed.tag)
            raise
        except Exception:
            log.exception("%s poll failed", feed.tag)
        finally:
            feed.in_flight.difference_update(kinds)

    # ---- loop ----------------------------------------------------

    def dispatch_due(self) -> List[asyncio.Task]:
        """Start one task per due feed. Must run inside the event loop."""
        now = self.clock()
        started: List[asyncio.Task] = []
        for feed in self.feeds.values():
            kinds = self.due_kinds(feed, now)
            if not kinds:
                continue
            log.debug("%s due: %s", feed.tag, ", ".join(k.label for k in kinds))
            feed.in_flight.update(kinds)
            task = asyncio.create_task(self._run_feed(feed, kinds, now), name=f"poll-{feed.icao}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        return started

    def stop(self) -> None:
        if not self._stopping.is_set():
            log.info("shutdown requested")
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def run(self, once: bool = False) -> None:
        while not self._stopping.is_set():
            started = self.dispatch_due()
            if once:
                if started:
                    await asyncio.wait(started)
                break
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
        await self._drain()

    async def _drain(self) -> None:
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        log.info("waiting up to %.0fs for %d poll(s) in flight",
                 self.shutdown_grace_seconds, len(pending))
        _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
        for t in still_running:
            t.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)


# -------------------------------------------------------------------
# entry point
# -------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="avwpulse",
        description="Poll METAR/TAF reports and publish the ones that changed.",
    )
    p.add_argument("-c", "--config", help="config file (default: $AVW_CONFIG or avwpulse.yml)")
    p.add_argument("-d", "--debug", action="store_true", help="debug logging")
    p.add_argument("-H", "--header", action="store_true", help="add a header line to the text")
    p.add_argument("-a", "--all", action="store_true",
                   help="forward every fetched report on a fixed interval")
    p.add_argument("-l", "--learn", dest="learn", action="store_true",
                   help="learn each station's reporting cadence (default unless -a)")
    p.add_argument("--no-learn", dest="learn", action="store_false",
                   help="poll on the fixed interval only")
    p.add_argument("-s", "--split", action="store_true",
                   help="publish METAR and TAF to separate topics")
    p.add_argument("--once", action="store_true", help="run a single pass and exit")
    p.set_defaults(learn=None)
    return p


def options_from_args(args: argparse.Namespace) -> RunOptions:
    learn = args.learn if args.learn is not None else not args.all
    return RunOptions(forward_all=args.all, learn=learn, split=args.split, header=args.header)


async def serve(cfg: AppConfig, options: RunOptions, once: bool = False) -> int:
    stations = load_stations(cfg.stations_file)
    feeds = build_feeds(cfg, stations)
    if not feeds:
        log.error("airports: none with METAR or TAF enabled")
        return 1

    publisher = RedisPublisher(
        cfg.broker.url,
        cfg.broker.topic_prefix,
        client_id=cfg.broker.client_id,
        username=cfg.broker.username,
        password=cfg.broker.password,
        retain=cfg.broker.retain,
    )
    try:
        await publisher.ping()
    except RedisError as e:
        log.error("broker: cannot connect to %s (%s)", cfg.broker.url, e)
        await publisher.aclose()
        return 1
    log.info("broker: connected to %s as %s", cfg.broker.url, cfg.broker.client_id)

    fetcher = Fetcher(timeout=cfg.scheduler.fetch_timeout_seconds)
    poller = Poller(
        feeds,
        options,
        fetcher,
        publisher,
        urls={ReportKind.METAR: cfg.scheduler.metar_url, ReportKind.TAF: cfg.scheduler.taf_url},
        topic_prefix=cfg.broker.topic_prefix,
        tick_seconds=cfg.scheduler.tick_seconds,
        shutdown_grace_seconds=cfg.scheduler.shutdown_grace_seconds,
        failure_retry_seconds=cfg.scheduler.failure_retry_seconds,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, poller.stop)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform; Ctrl-C still ends asyncio.run
            pass

    try:
        await poller.run(once=once)
    finally:
        await fetcher.aclose()
        await publisher.aclose()
    log.info("shutdown complete")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format=LOG_FORMAT,
    )

    settings = Settings()
    path = args.config or settings.avw_config
    try:
        cfg = load_config(path, settings)
    except ConfigError as e:
        log.error("%s", e)
        return 1

    options = options_from_args(args)
    log.info(
        "boot: %d airport(s) | forward_all=%s learn=%s split=%s header=%s once=%s",
        len(cfg.airports), options.forward_all, options.learn,
        options.split, options.header, args.once,
    )
    return asyncio.run(serve(cfg, options, once=args.once))


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
