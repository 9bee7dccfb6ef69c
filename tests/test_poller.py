import asyncio
import calendar
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from apps.sanitizer.publisher import utc_stamp
from apps.scheduler.config import AppConfig, AirportConfig
from apps.scheduler.main import (
    Feed,
    Poller,
    RunOptions,
    build_arg_parser,
    build_feeds,
    main,
    options_from_args,
)
from apps.scheduler.schedule import SLACK_SECONDS, ReportKind
from apps.workers.reports import parse_iso_time
from apps.workers.stations import Station
from tests.samples import metar_doc, taf_doc

import apps.scheduler.main as scheduler_main

URLS = {
    ReportKind.METAR: "http://wx.test/metar?ids={icao}",
    ReportKind.TAF: "http://wx.test/taf?ids={icao}",
}
T0 = calendar.timegm((2025, 1, 5, 12, 53, 10, 0, 0, 0))
METAR_1250 = "2025-01-05T12:50:00Z"
METAR_1320 = "2025-01-05T13:20:00Z"
TAF_1100 = "2025-01-05T11:00:00Z"


class Clock:
    def __init__(self, t=T0):
        self.t = t

    def __call__(self):
        return self.t


class FakeFetcher:
    def __init__(self, docs=None):
        self.docs = dict(docs or {})
        self.calls = []

    async def fetch(self, url):
        self.calls.append(url)
        return self.docs.get(url)

    async def aclose(self):
        self.closed = True


class FakePublisher:
    def __init__(self, fail_schedule=False, accept=True):
        self.messages = []
        self.attempts = []
        self.schedules = {}
        self.fail_schedule = fail_schedule
        self.accept = accept
        self.closed = False

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True

    async def publish(self, topic, payload):
        self.attempts.append(topic)
        if not self.accept:
            return False
        self.messages.append((topic, json.loads(payload)))
        return True

    async def publish_schedule(self, icao, snapshot):
        if self.fail_schedule:
            raise RuntimeError("boom")
        self.schedules[icao] = snapshot


def _feed(kinds=(ReportKind.METAR, ReportKind.TAF), interval=10, station=None):
    cfg = AppConfig(airports=[AirportConfig(
        icao="EGLL",
        fetch_metar=ReportKind.METAR in kinds,
        fetch_taf=ReportKind.TAF in kinds,
        interval_minutes=interval,
    )])
    stations = {"EGLL": station} if station else {}
    return build_feeds(cfg, stations)


def _docs(metar=METAR_1250, taf=TAF_1100):
    docs = {}
    if metar:
        docs[URLS[ReportKind.METAR].format(icao="EGLL")] = metar_doc(metar)
    if taf:
        docs[URLS[ReportKind.TAF].format(icao="EGLL")] = taf_doc(taf)
    return docs


def _poller(feeds, fetcher, publisher, clock, options=RunOptions(), **kw):
    return Poller(feeds, options, fetcher, publisher, URLS, clock=clock, **kw)


async def _pass(poller):
    tasks = poller.dispatch_due()
    if tasks:
        await asyncio.wait(tasks)
    return tasks


# ---------------------------------------------------------------------------
# feeds
# ---------------------------------------------------------------------------

def test_build_feeds():
    st = Station(icao="EGLL", name="london heathrow")
    feeds = _feed(kinds=(ReportKind.TAF,), interval=5, station=st)
    feed = feeds["EGLL"]
    assert feed.kinds == [ReportKind.TAF]
    assert set(feed.states) == {ReportKind.TAF}
    assert feed.interval_minutes == 5
    assert feed.station is st


def test_feed_without_kinds_is_skipped():
    assert _feed(kinds=()) == {}


# ---------------------------------------------------------------------------
# change detection (default)
# ---------------------------------------------------------------------------

def test_first_pass_publishes_combined_envelope():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed(station=Station(icao="EGLL", name="london heathrow", iata="LHR"))

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, clock)
        await _pass(poller)

    asyncio.run(go())

    assert len(pub.messages) == 1
    topic, env = pub.messages[0]
    assert topic == "weather/aviation/EGLL"
    assert env["timestamp"] == "2025-01-05T12:53:10Z"
    assert env["airport"]["name"] == "london heathrow"
    assert env["airport"]["iata"] == "LHR"
    assert env["metar"]["observed"] == METAR_1250
    assert env["metar"]["text"].startswith("issued Jan-5-1250Z\n")
    assert env["taf"]["issued"] == TAF_1100

    snap = pub.schedules["EGLL"]
    assert snap["last_fetch"] == T0
    assert [k["kind"] for k in snap["kinds"]] == ["metar", "taf"]
    assert snap["kinds"][0]["last_issued"] == parse_iso_time(METAR_1250)


def test_unchanged_report_is_not_republished():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed()
    fetcher = FakeFetcher(_docs())

    async def go():
        poller = _poller(feeds, fetcher, pub, clock)
        await _pass(poller)
        # not due yet
        assert await _pass(poller) == []
        clock.t += 600
        assert len(await _pass(poller)) == 1

    asyncio.run(go())
    assert len(fetcher.calls) == 4
    assert len(pub.messages) == 1


def test_combined_mode_fills_in_the_kind_that_was_not_due():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed()
    fetcher = FakeFetcher(_docs())

    async def go():
        poller = _poller(feeds, fetcher, pub, clock)
        await _pass(poller)
        feeds["EGLL"].states[ReportKind.TAF].next_fetch = T0 + 86_400
        fetcher.docs.update(_docs(metar=METAR_1320, taf=None))
        clock.t += 600
        await _pass(poller)

    asyncio.run(go())
    assert fetcher.calls[-1] == "http://wx.test/metar?ids=EGLL"
    assert len(pub.messages) == 2
    env = pub.messages[1][1]
    assert env["metar"]["observed"] == METAR_1320
    assert env["taf"]["issued"] == TAF_1100


def test_split_mode_publishes_per_kind():
    pub = FakePublisher()
    feeds = _feed()

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, Clock(), RunOptions(split=True))
        await _pass(poller)

    asyncio.run(go())
    assert [t for t, _ in pub.messages] == ["weather/aviation/EGLL/metar", "weather/aviation/EGLL/taf"]
    assert set(pub.messages[0][1]) == {"timestamp", "airport", "metar"}


def test_header_option_reaches_text():
    pub = FakePublisher()
    feeds = _feed(kinds=(ReportKind.METAR,), station=Station(icao="EGLL", name="london heathrow"))

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, Clock(), RunOptions(header=True))
        await _pass(poller)

    asyncio.run(go())
    text = pub.messages[0][1]["metar"]["text"]
    assert text.startswith("METAR for London heathrow (EGLL) issued Jan-5-1250Z\n")


def test_learned_cadence_drives_next_fetch():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed(kinds=(ReportKind.METAR,))
    fetcher = FakeFetcher()
    url = URLS[ReportKind.METAR].format(icao="EGLL")
    base = parse_iso_time(METAR_1250)

    async def go():
        poller = _poller(feeds, fetcher, pub, clock)
        for i in range(5):
            issued = base + i * 1800
            fetcher.docs[url] = metar_doc(utc_stamp(issued))
            clock.t = issued + 70
            await _pass(poller)

    asyncio.run(go())
    state = feeds["EGLL"].states[ReportKind.METAR]
    assert state.learned_period == 1800
    assert state.next_fetch == base + 5 * 1800 + SLACK_SECONDS
    assert len(pub.messages) == 5


# ---------------------------------------------------------------------------
# fixed interval modes
# ---------------------------------------------------------------------------

def test_forward_all_republishes_every_interval():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed(interval=5)
    options = RunOptions(forward_all=True, learn=False)

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, clock, options)
        await _pass(poller)
        clock.t += 299
        assert await _pass(poller) == []
        clock.t += 1
        await _pass(poller)

    asyncio.run(go())
    assert len(pub.messages) == 2
    assert feeds["EGLL"].last_fetch == T0 + 300
    assert feeds["EGLL"].states[ReportKind.METAR].last_issued == 0


def test_no_learn_uses_interval_but_still_filters():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed(interval=5)
    options = RunOptions(learn=False)

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, clock, options)
        await _pass(poller)
        clock.t += 300
        assert len(await _pass(poller)) == 1

    asyncio.run(go())
    assert len(pub.messages) == 1
    state = feeds["EGLL"].states[ReportKind.METAR]
    assert state.next_fetch == 0 and len(state.samples) == 0


# ---------------------------------------------------------------------------
# failures / guards / shutdown
# ---------------------------------------------------------------------------

def test_fetch_failure_changes_nothing_and_retries():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed(kinds=(ReportKind.METAR,))
    fetcher = FakeFetcher()

    async def go():
        poller = _poller(feeds, fetcher, pub, clock)
        await _pass(poller)
        clock.t += 5
        await _pass(poller)

    asyncio.run(go())
    state = feeds["EGLL"].states[ReportKind.METAR]
    assert len(fetcher.calls) == 2
    assert pub.messages == []
    assert state.next_fetch == 0 and state.last_issued == 0
    assert feeds["EGLL"].last_failure[ReportKind.METAR] == T0 + 5


def test_failure_retry_floor():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed(kinds=(ReportKind.METAR,))
    fetcher = FakeFetcher()

    async def go():
        poller = _poller(feeds, fetcher, pub, clock, failure_retry_seconds=60)
        await _pass(poller)
        clock.t += 30
        assert await _pass(poller) == []
        clock.t += 30
        fetcher.docs.update(_docs(taf=None))
        await _pass(poller)

    asyncio.run(go())
    assert len(fetcher.calls) == 2
    assert len(pub.messages) == 1
    assert ReportKind.METAR not in feeds["EGLL"].last_failure


def test_failed_publish_does_not_roll_back_state():
    clock, pub = Clock(), FakePublisher(accept=False)
    feeds = _feed(kinds=(ReportKind.METAR,))

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, clock)
        await _pass(poller)
        state = feeds["EGLL"].states[ReportKind.METAR]
        assert state.last_issued == parse_iso_time(METAR_1250)
        assert list(state.samples) == [parse_iso_time(METAR_1250)]
        assert state.next_fetch == T0 + 600

        pub.accept = True
        clock.t += 600
        assert len(await _pass(poller)) == 1

    asyncio.run(go())
    assert pub.attempts == ["weather/aviation/EGLL"]
    assert pub.messages == []
    assert list(feeds["EGLL"].states[ReportKind.METAR].samples) == [parse_iso_time(METAR_1250)]


def test_unparseable_document_counts_as_failure():
    pub = FakePublisher()
    feeds = _feed(kinds=(ReportKind.METAR,))
    fetcher = FakeFetcher({URLS[ReportKind.METAR].format(icao="EGLL"): b"<html>oops</html>"})

    async def go():
        await _pass(_poller(feeds, fetcher, pub, Clock()))

    asyncio.run(go())
    assert pub.messages == []
    assert ReportKind.METAR in feeds["EGLL"].last_failure


def test_in_flight_kind_is_not_dispatched():
    feeds = _feed()
    feed = feeds["EGLL"]
    feed.in_flight.add(ReportKind.METAR)

    async def go():
        poller = _poller(feeds, FakeFetcher(), FakePublisher(), Clock())
        return poller.due_kinds(feed, T0)

    assert asyncio.run(go()) == [ReportKind.TAF]


def test_in_flight_guard_holds_during_slow_fetch():
    clock, pub = Clock(), FakePublisher()
    feeds = _feed(kinds=(ReportKind.METAR,))
    gate = {}

    class SlowFetcher(FakeFetcher):
        async def fetch(self, url):
            self.calls.append(url)
            await gate["event"].wait()
            return metar_doc(METAR_1250)

    fetcher = SlowFetcher()

    async def go():
        gate["event"] = asyncio.Event()
        poller = _poller(feeds, fetcher, pub, clock)
        first = poller.dispatch_due()
        await asyncio.sleep(0)
        assert poller.dispatch_due() == []
        gate["event"].set()
        await asyncio.wait(first)
        assert feeds["EGLL"].in_flight == set()

    asyncio.run(go())
    assert len(fetcher.calls) == 1
    assert len(pub.messages) == 1


def test_feed_exception_is_contained():
    feeds = _feed(kinds=(ReportKind.METAR,))
    pub = FakePublisher(fail_schedule=True)

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, Clock())
        tasks = await _pass(poller)
        assert all(t.exception() is None for t in tasks)

    asyncio.run(go())
    assert feeds["EGLL"].in_flight == set()


def test_nothing_published_after_stop():
    feeds = _feed(kinds=(ReportKind.METAR,))
    pub = FakePublisher()
    holder = {}

    class StoppingFetcher(FakeFetcher):
        async def fetch(self, url):
            holder["poller"].stop()
            return metar_doc(METAR_1250)

    async def go():
        poller = _poller(feeds, StoppingFetcher(), pub, Clock())
        holder["poller"] = poller
        await _pass(poller)
        assert poller.stopping

    asyncio.run(go())
    assert pub.messages == []
    assert pub.schedules == {}


def test_run_once():
    pub = FakePublisher()
    feeds = _feed()

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, Clock(), tick_seconds=0.01)
        await asyncio.wait_for(poller.run(once=True), timeout=5)

    asyncio.run(go())
    assert len(pub.messages) == 1


def test_run_until_stopped():
    pub = FakePublisher()
    feeds = _feed()

    async def go():
        poller = _poller(feeds, FakeFetcher(_docs()), pub, Clock(), tick_seconds=0.01)
        runner = asyncio.create_task(poller.run())
        await asyncio.sleep(0.05)
        poller.stop()
        await asyncio.wait_for(runner, timeout=5)

    asyncio.run(go())
    assert len(pub.messages) == 1


def test_shutdown_cancels_polls_past_grace():
    feeds = _feed(kinds=(ReportKind.METAR,))

    class HangingFetcher(FakeFetcher):
        async def fetch(self, url):
            await asyncio.sleep(3600)

    async def go():
        poller = _poller(feeds, HangingFetcher(), FakePublisher(), Clock(),
                         tick_seconds=0.01, shutdown_grace_seconds=0.05)
        runner = asyncio.create_task(poller.run())
        await asyncio.sleep(0.03)
        poller.stop()
        await asyncio.wait_for(runner, timeout=5)

    asyncio.run(go())
    assert feeds["EGLL"].in_flight == set()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("argv, expected", [
    ([], RunOptions(forward_all=False, learn=True)),
    (["-a"], RunOptions(forward_all=True, learn=False)),
    (["-a", "-l"], RunOptions(forward_all=True, learn=True)),
    (["--no-learn"], RunOptions(forward_all=False, learn=False)),
    (["-s", "-H"], RunOptions(split=True, header=True)),
])
def test_options_from_args(argv, expected):
    assert options_from_args(build_arg_parser().parse_args(argv)) == expected


def test_bad_usage_exits_2():
    with pytest.raises(SystemExit) as exc:
        main(["--bogus"])
    assert exc.value.code == 2


def test_config_error_exits_1(tmp_path):
    assert main(["-c", str(tmp_path / "missing.yml")]) == 1


def test_broker_down_exits_1(tmp_path, monkeypatch):
    cfg = tmp_path / "avwpulse.yml"
    cfg.write_text("airports: [EGLL]\n", encoding="utf-8")

    class DownPublisher(FakePublisher):
        async def ping(self):
            raise RedisConnectionError("refused")

    down = DownPublisher()
    monkeypatch.setattr(scheduler_main, "RedisPublisher", lambda *a, **kw: down)
    assert main(["-c", str(cfg), "--once"]) == 1
    assert down.closed
    assert down.messages == []


def test_once_end_to_end(tmp_path, monkeypatch):
    cfg = tmp_path / "avwpulse.yml"
    cfg.write_text("airports: [EGLL]\n", encoding="utf-8")
    pub = FakePublisher()
    fetcher = FakeFetcher({
        "https://aviationweather.gov/api/data/metar?format=xml&taf=false&ids=EGLL": metar_doc(METAR_1250),
        "https://aviationweather.gov/api/data/taf?format=xml&ids=EGLL": taf_doc(TAF_1100),
    })

    monkeypatch.setattr(scheduler_main, "RedisPublisher", lambda *a, **kw: pub)
    monkeypatch.setattr(scheduler_main, "Fetcher", lambda *a, **kw: fetcher)
    assert main(["-c", str(cfg), "--once", "-s"]) == 0
    assert [t for t, _ in pub.messages] == ["weather/aviation/EGLL/metar", "weather/aviation/EGLL/taf"]
    assert pub.closed and fetcher.closed


def test_feed_snapshot():
    feed = Feed(icao="EGLL", kinds=[], interval_minutes=10, states={})
    assert feed.snapshot() == {"icao": "EGLL", "last_fetch": 0, "kinds": []}
    assert feed.tag == "[EGLL]"
