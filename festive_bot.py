"""
Festive Bot — Advent of Code Private Leaderboard Watcher
========================================================
Polls an Advent of Code private leaderboard on a fixed schedule, detects
star completions that happened since the last observation, scores them with
a reciprocal-days value and posts one webhook message per completion.
Also posts puzzle-unlock announcements, periodic standings, a year-end
sign-off, heartbeats and status/error messages.

Requirements:
  pip install requests python-dotenv

Env vars:
  FESTIVE_BOT_LEADERBOARD=...   (required) private leaderboard id
  FESTIVE_BOT_SESSION=...       (required) adventofcode.com session cookie
  FESTIVE_BOT_NOTIFY=...        webhook for completions, unlocks, standings
  FESTIVE_BOT_STATUS=...        webhook for status, heartbeats, errors

Optional:
  FESTIVE_BOT_STATE_DIR=.       where timestamp_<year>_<leaderboard> files live

Usage:
  python festive_bot.py                              # current year, hourly
  python festive_bot.py --period 30 --heartbeat 360  # half-hourly, heartbeat every 6h
  python festive_bot.py --all-years --once           # single cycle over every live year

Cron (hourly, one cycle per run):
  0 * * * * cd /path/to/bot && /usr/bin/env python festive_bot.py --once >> /var/log/festive_bot.log 2>&1
"""

from __future__ import annotations

import argparse
import bisect
import fcntl
import json
import os
import signal
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
from dotenv import load_dotenv

__version__ = "0.3.0"

USER_AGENT = f"Festive Bot v{__version__} (python-requests); https://github.com/festive-bot/festive-bot"


# =============================================================================
# Utilities
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def utc_now_iso() -> str:
    return utc_now().isoformat()

def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def format_rfc3339(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")

def parse_rfc3339(text: str) -> Optional[datetime]:
    """Parse an RFC-3339 timestamp. Returns None for anything without an explicit offset."""
    text = text.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        return None
    if value.tzinfo is None:
        return None
    return value.astimezone(timezone.utc)

def mkdirp(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def write_text_atomic(path: Path, text: str) -> None:
    """Write text atomically with fsync + directory sync.
    Readers see either the old content or the new content, never a mix."""
    dir_path = str(path.parent) or "."
    fd, tmp = tempfile.mkstemp(dir=dir_path, suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, str(path))
        dir_fd = os.open(dir_path, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


# =============================================================================
# Errors
# =============================================================================

class FestiveError(Exception):
    """Base class for every error the bot raises on purpose."""


class ConfigError(FestiveError):
    """Invalid interval relationships or missing mandatory settings. Fatal at startup."""


class FetchError(FestiveError):
    """The leaderboard snapshot could not be retrieved. The year's cycle is skipped."""


class Unauthorized(FetchError):
    pass


class NotFound(FetchError):
    pass


class Transient(FetchError):
    pass


class Malformed(FetchError):
    pass


class MalformedRecordError(FestiveError):
    """A single completion record could not be used. Dropped, never aborts a cycle."""

    def __init__(self, message: str, member_id: Any = None,
                 day: Any = None, part: Any = None):
        super().__init__(message)
        self.member_id = member_id
        self.day = day
        self.part = part


class PersistenceError(FestiveError):
    """The watermark could not be read or durably written."""


class NotifyError(FestiveError):
    """A webhook message could not be delivered."""


class NotifyTransient(NotifyError):
    pass


class NotifyRejected(NotifyError):
    pass


# =============================================================================
# Data model
# =============================================================================

@dataclass(frozen=True)
class CompletionRecord:
    """One star: a member completed part 1 or 2 of a day's puzzle."""
    member_id: int
    day: int
    part: int
    completed_at: datetime
    member_name: str = ""

    @property
    def display_name(self) -> str:
        return self.member_name or f"(anonymous user #{self.member_id})"

    @property
    def identity(self) -> Tuple[int, int, int, datetime]:
        return (self.member_id, self.day, self.part, self.completed_at)

    def sort_key(self) -> Tuple[datetime, int, int, int]:
        return (self.completed_at, self.day, self.part, self.member_id)


@dataclass(frozen=True)
class Snapshot:
    year: int
    leaderboard_id: str
    records: Tuple[CompletionRecord, ...] = ()
    errors: Tuple[MalformedRecordError, ...] = ()
    fetched_at: Optional[datetime] = None


@dataclass(frozen=True)
class Watermark:
    """Latest completion instant already reported for one (year, leaderboard)."""
    year: int
    leaderboard_id: str
    last_seen: Optional[datetime] = None  # None = nothing reported yet

    @property
    def key(self) -> Tuple[int, str]:
        return (self.year, self.leaderboard_id)

    def advanced_to(self, instant: datetime) -> Watermark:
        if self.last_seen is not None and self.last_seen >= instant:
            return self
        return Watermark(self.year, self.leaderboard_id, instant)


@dataclass(frozen=True)
class CompletionEvent:
    record: CompletionRecord
    score: Fraction
    year: int

    def format_message(self) -> str:
        if self.record.part == 1:
            part, stars = "one", ":star:"
        else:
            part, stars = "two", ":star: :star:"
        plural = "" if self.score == 1 else "s"
        return (f":christmas_tree: [{self.year}] {self.record.display_name} has completed "
                f"puzzle {self.record.day:02d}, part {part}, "
                f"scoring {self.score} point{plural}! {stars}")


@dataclass(frozen=True)
class DiffResult:
    events: Tuple[CompletionEvent, ...]
    watermark: Watermark
    errors: Tuple[MalformedRecordError, ...] = ()


# =============================================================================
# Scoring — reciprocal of full days since the puzzle unlocked
# =============================================================================

FIRST_YEAR = 2015
LAST_PUZZLE_DAY = 25
PUZZLE_UNLOCK_HOUR = 5  # 05:00 UTC, midnight US Eastern
ONE_DAY = timedelta(days=1)


def puzzle_unlock(year: int, day: int) -> datetime:
    """Puzzles unlock at 05:00 UTC on 1st..25th December."""
    return datetime(year, 12, day, PUZZLE_UNLOCK_HOUR, 0, tzinfo=timezone.utc)


def score(released_at: datetime, completed_at: datetime) -> Fraction:
    """1 / (full days elapsed + 1), exact.

    A completion before the release instant is bad source data; it is
    clamped to zero elapsed days and scores the maximum.
    """
    days_elapsed = max(0, (completed_at - released_at) // ONE_DAY)
    return Fraction(1, days_elapsed + 1)


@dataclass(frozen=True)
class StandingsRow:
    member_id: int
    name: str
    score: Fraction


def compute_standings(records: Iterable[CompletionRecord], year: int) -> List[StandingsRow]:
    """Sum every member's scores across the year.

    Recomputed from the full snapshot on demand; the watermark is not involved.
    Sorted by score descending, then name, then member id.
    """
    totals: Dict[int, Fraction] = {}
    names: Dict[int, str] = {}
    counted = set()
    for record in records:
        if validate_record(record) is not None:
            continue
        star = (record.member_id, record.day, record.part)
        if star in counted:
            continue
        counted.add(star)
        released = puzzle_unlock(year, record.day)
        totals[record.member_id] = totals.get(record.member_id, Fraction(0)) + score(released, record.completed_at)
        names.setdefault(record.member_id, record.display_name)

    rows = [StandingsRow(mid, names[mid], total) for mid, total in totals.items()]
    rows.sort(key=lambda r: (-r.score, r.name, r.member_id))
    return rows


def format_standings(rows: Sequence[StandingsRow]) -> str:
    if not rows:
        return "No scores yet: get programming!\n"
    width = max(len(r.name) for r in rows)
    lines = []
    for r in rows:
        padding = " " * (width - len(r.name) + 1)
        lines.append(f"{r.name}:{padding}{float(r.score):>5.2f}")
    return "\n".join(lines) + "\n"


# =============================================================================
# Diff logic — watermark dedupe
# =============================================================================

def validate_record(record: CompletionRecord) -> Optional[MalformedRecordError]:
    """Return the reason a record is unusable, or None if it is fine."""
    def bad(reason: str) -> MalformedRecordError:
        return MalformedRecordError(
            f"member {record.member_id!r} day {record.day!r} part {record.part!r}: {reason}",
            member_id=record.member_id, day=record.day, part=record.part)

    if not isinstance(record.member_id, int) or isinstance(record.member_id, bool):
        return bad("member id is not an integer")
    if not isinstance(record.day, int) or isinstance(record.day, bool) \
            or not 1 <= record.day <= LAST_PUZZLE_DAY:
        return bad("day outside 1..25")
    if isinstance(record.part, bool) or record.part not in (1, 2):
        return bad("part is neither 1 nor 2")
    if not isinstance(record.completed_at, datetime) or record.completed_at.tzinfo is None:
        return bad("completion time is not an aware UTC instant")
    return None


def diff(snapshot: Snapshot, watermark: Watermark) -> DiffResult:
    """Select records newer than the watermark, score them, advance the watermark.

    Records exactly at the watermark count as already reported. Output order
    is completion time ascending, ties by (day, part, member id). Malformed
    records are dropped and returned in `errors`; the rest still diff.
    """
    if (snapshot.year, snapshot.leaderboard_id) != watermark.key:
        raise ValueError(
            f"snapshot {snapshot.year}/{snapshot.leaderboard_id} diffed against "
            f"watermark {watermark.year}/{watermark.leaderboard_id}")

    errors: List[MalformedRecordError] = list(snapshot.errors)
    selected: Dict[Tuple[int, int, int, datetime], CompletionRecord] = {}
    for record in snapshot.records:
        problem = validate_record(record)
        if problem is not None:
            errors.append(problem)
            continue
        if watermark.last_seen is not None and record.completed_at <= watermark.last_seen:
            continue
        selected.setdefault(record.identity, record)

    ordered = sorted(selected.values(), key=CompletionRecord.sort_key)
    events = tuple(
        CompletionEvent(
            record=r,
            score=score(puzzle_unlock(snapshot.year, r.day), r.completed_at),
            year=snapshot.year,
        )
        for r in ordered
    )
    new_watermark = watermark.advanced_to(ordered[-1].completed_at) if ordered else watermark
    return DiffResult(events=events, watermark=new_watermark, errors=tuple(errors))


# =============================================================================
# Watermark persistence
# =============================================================================

class WatermarkStore:
    """Durable (year, leaderboard) -> timestamp mapping.

    After store() returns, load() for the same key never yields an older value,
    including across restarts. store() raises PersistenceError on failure and
    leaves the previous value in place.
    """

    def load(self, year: int, leaderboard_id: str) -> Watermark:
        raise NotImplementedError

    def store(self, watermark: Watermark) -> None:
        raise NotImplementedError


class MemoryWatermarkStore(WatermarkStore):
    def __init__(self) -> None:
        self._marks: Dict[Tuple[int, str], datetime] = {}

    def load(self, year: int, leaderboard_id: str) -> Watermark:
        return Watermark(year, leaderboard_id, self._marks.get((year, leaderboard_id)))

    def store(self, watermark: Watermark) -> None:
        if watermark.last_seen is None:
            return
        current = self._marks.get(watermark.key)
        if current is None or watermark.last_seen > current:
            self._marks[watermark.key] = watermark.last_seen


class FileWatermarkStore(WatermarkStore):
    """One human-editable text file per key, holding a single RFC-3339 timestamp."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.corrupt_files: List[str] = []  # drained by the bot and reported

    def path_for(self, year: int, leaderboard_id: str) -> Path:
        return self.state_dir / f"timestamp_{year}_{leaderboard_id}"

    def load(self, year: int, leaderboard_id: str) -> Watermark:
        path = self.path_for(year, leaderboard_id)
        if not path.exists():
            return Watermark(year, leaderboard_id, None)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"cannot read {path.name}: {e}") from e

        last_seen = parse_rfc3339(text)
        if last_seen is None:
            # Move the bad file aside so a human can inspect it and the next write starts clean
            ts = utc_now().strftime("%Y%m%dT%H%M%S")
            corrupt_path = path.with_name(f"{path.name}.corrupt.{ts}")
            try:
                path.rename(corrupt_path)
                print(f"  [WARN] Corrupt watermark: {path.name} -> {corrupt_path.name}: {text.strip()[:40]!r}")
            except OSError:
                print(f"  [WARN] Corrupt watermark: {path.name}: {text.strip()[:40]!r} (could not rename)")
            self.corrupt_files.append(f"{path.name}: {text.strip()[:40]!r}")
        return Watermark(year, leaderboard_id, last_seen)

    def store(self, watermark: Watermark) -> None:
        if watermark.last_seen is None:
            return
        path = self.path_for(watermark.year, watermark.leaderboard_id)
        if path.exists():
            try:
                current = parse_rfc3339(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError) as e:
                raise PersistenceError(f"cannot read {path.name}: {e}") from e
            if current is not None and current >= watermark.last_seen:
                return
        try:
            mkdirp(self.state_dir)
            write_text_atomic(path, format_rfc3339(watermark.last_seen) + "\n")
        except OSError as e:
            raise PersistenceError(f"cannot write {path.name}: {e}") from e


# =============================================================================
# Schedule — cycles aligned to the 05:00 UTC daily unlock
# =============================================================================

MINUTES_PER_DAY = 1440
MINUTES_PER_WEEK = 10080
MIN_PERIOD_MINUTES = 15

# Every grid is anchored here: the first ever puzzle unlock. Steps dividing a day
# land on each day's 05:00; week-long steps stay put across restarts.
GRID_ANCHOR = datetime(FIRST_YEAR, 12, 1, PUZZLE_UNLOCK_HOUR, 0, tzinfo=timezone.utc)

PERIOD_FACTORS = [m for m in range(MIN_PERIOD_MINUTES, MINUTES_PER_DAY + 1) if MINUTES_PER_DAY % m == 0]


@dataclass(frozen=True)
class ScheduleConfig:
    period_minutes: int = 60
    standings_interval_minutes: int = MINUTES_PER_DAY
    heartbeat_interval_minutes: int = 0  # 0 = disabled

    def __post_init__(self) -> None:
        period = self.period_minutes
        if period < MIN_PERIOD_MINUTES or MINUTES_PER_DAY % period != 0:
            raise ConfigError(
                f"period of {period} minutes must be at least {MIN_PERIOD_MINUTES} "
                f"and divide one day ({MINUTES_PER_DAY} minutes) exactly")
        standings = self.standings_interval_minutes
        if standings <= 0 or standings % period != 0 or standings > MINUTES_PER_WEEK:
            raise ConfigError(
                f"standings interval of {standings} minutes must be a positive multiple "
                f"of the {period} minute period, at most {MINUTES_PER_WEEK}")
        heartbeat = self.heartbeat_interval_minutes
        if heartbeat != 0 and (heartbeat < 0 or heartbeat % period != 0 or heartbeat > MINUTES_PER_WEEK):
            raise ConfigError(
                f"heartbeat interval of {heartbeat} minutes must be 0 (disabled) or a "
                f"multiple of the {period} minute period, at most {MINUTES_PER_WEEK}")

    @property
    def period(self) -> timedelta:
        return timedelta(minutes=self.period_minutes)


@dataclass(frozen=True)
class CycleDecision:
    next_instant: datetime
    standings_due: bool
    heartbeat_due: bool
    unlock_day: Optional[int] = None  # December day whose puzzle unlocks at next_instant
    year_end: bool = False            # the cycle after next_instant is in another year
    poll_due: bool = True


def on_grid(instant: datetime, step_minutes: int) -> bool:
    return (instant - GRID_ANCHOR) % timedelta(minutes=step_minutes) == timedelta(0)


def compute_next_cycle(now: datetime, config: ScheduleConfig) -> CycleDecision:
    """Next grid instant strictly after `now`, and what is due at it.

    Never returns `now` itself, and never a backlog: after a long sleep only
    the single next grid point is returned.
    """
    now = ensure_utc(now)
    period = config.period
    next_instant = GRID_ANCHOR + ((now - GRID_ANCHOR) // period + 1) * period

    december = next_instant.month == 12
    unlock_day = None
    if december and next_instant.day <= LAST_PUZZLE_DAY and next_instant == puzzle_unlock(next_instant.year, next_instant.day):
        unlock_day = next_instant.day

    hb = config.heartbeat_interval_minutes
    return CycleDecision(
        next_instant=next_instant,
        standings_due=december and on_grid(next_instant, config.standings_interval_minutes),
        heartbeat_due=hb > 0 and on_grid(next_instant, hb),
        unlock_day=unlock_day,
        year_end=(next_instant + period).year != next_instant.year,
    )


def current_cycle(now: datetime, config: ScheduleConfig) -> CycleDecision:
    """Decision for the latest grid instant at or before `now` (used by --once)."""
    return compute_next_cycle(ensure_utc(now) - config.period, config)


def round_period(minutes: int) -> int:
    """Round up to the next factor of one day."""
    i = bisect.bisect_left(PERIOD_FACTORS, minutes)
    if i == len(PERIOD_FACTORS):
        raise ConfigError(f"period of {minutes} minutes is longer than one day")
    return PERIOD_FACTORS[i]


def round_to_multiple(minutes: int, period_minutes: int) -> int:
    return (minutes + period_minutes - 1) // period_minutes * period_minutes


def live_years_at(now: datetime) -> List[int]:
    """Every event year whose first puzzle has unlocked by `now`."""
    now = ensure_utc(now)
    years = list(range(FIRST_YEAR, now.year))
    if puzzle_unlock(now.year, 1) <= now:
        years.append(now.year)
    return years


class SystemClock:
    """Wall clock with a cancellable wait. Signal handlers call cancel()."""

    def __init__(self) -> None:
        self._stop = threading.Event()

    def now(self) -> datetime:
        return utc_now()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def cancel(self) -> None:
        self._stop.set()

    def wait_until(self, instant: datetime) -> bool:
        """Block until `instant`. Returns False if cancelled first."""
        while not self._stop.is_set():
            remaining = (instant - self.now()).total_seconds()
            if remaining <= 0:
                return True
            # Re-check the wall clock after waking; Event.wait may return early
            self._stop.wait(min(remaining, 3600))
        return False


# =============================================================================
# Leaderboard client
# =============================================================================

AOC_BASE_URL = "https://adventofcode.com"


def parse_snapshot(payload: Any, year: int, leaderboard_id: str,
                   fetched_at: Optional[datetime] = None) -> Snapshot:
    """Decode the private leaderboard JSON.

    Only a payload without a members object is fatal (Malformed). Individual
    stars that cannot be decoded are collected in Snapshot.errors.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("members"), dict):
        raise Malformed("leaderboard payload has no members object")
    event = payload.get("event")
    if event is not None and str(event) != str(year):
        raise Malformed(f"leaderboard payload is for event {event!r}, expected {year}")

    records: List[CompletionRecord] = []
    errors: List[MalformedRecordError] = []
    for member_key, member in payload["members"].items():
        if not isinstance(member, dict):
            errors.append(MalformedRecordError(f"member {member_key!r}: not an object", member_id=member_key))
            continue
        try:
            member_id = int(member.get("id", member_key))
        except (TypeError, ValueError):
            errors.append(MalformedRecordError(f"member {member_key!r}: id is not an integer", member_id=member_key))
            continue
        name = member.get("name") or ""

        days = member.get("completion_day_level") or {}
        if not isinstance(days, dict):
            errors.append(MalformedRecordError(f"member {member_id}: completion_day_level is not an object", member_id=member_id))
            continue
        for day_key, parts in days.items():
            if not isinstance(parts, dict):
                errors.append(MalformedRecordError(f"member {member_id} day {day_key!r}: not an object",
                                                   member_id=member_id, day=day_key))
                continue
            for part_key, contents in parts.items():
                try:
                    ts = contents["get_star_ts"]
                    if isinstance(ts, bool):
                        raise TypeError("boolean timestamp")
                    completed_at = datetime.fromtimestamp(int(ts), timezone.utc)
                    record = CompletionRecord(
                        member_id=member_id,
                        day=int(day_key),
                        part=int(part_key),
                        completed_at=completed_at,
                        member_name=str(name),
                    )
                except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
                    errors.append(MalformedRecordError(
                        f"member {member_id} day {day_key!r} part {part_key!r}: {type(e).__name__}: {e}",
                        member_id=member_id, day=day_key, part=part_key))
                    continue
                records.append(record)

    return Snapshot(year=year, leaderboard_id=leaderboard_id, records=tuple(records),
                    errors=tuple(errors), fetched_at=fetched_at)


class LeaderboardClient:
    """Fetches private leaderboard snapshots with a session cookie."""

    def __init__(self, session_cookie: str, http: Optional[requests.Session] = None,
                 base_url: str = AOC_BASE_URL, timeout_s: int = 30):
        self.session_cookie = session_cookie
        self.http = http or build_http_session()
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def url(self, year: int, leaderboard_id: str) -> str:
        return f"{self.base_url}/{year}/leaderboard/private/view/{leaderboard_id}.json"

    def fetch(self, year: int, leaderboard_id: str) -> Snapshot:
        url = self.url(year, leaderboard_id)
        try:
            r = self.http.get(
                url,
                headers={"Cookie": f"session={self.session_cookie}"},
                timeout=self.timeout_s,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            raise Transient(f"{type(e).__name__}: {str(e)[:200]}") from e

        status = r.status_code
        if 300 <= status < 400 or status in (401, 403):
            # Unauthenticated requests are redirected to the login page
            raise Unauthorized(f"HTTP {status} for {year}/{leaderboard_id}: session cookie rejected")
        if status == 404:
            raise NotFound(f"HTTP 404 for {year}/{leaderboard_id}: no such leaderboard")
        if status == 500:
            raise Transient(f"HTTP 500 for {year}/{leaderboard_id}: the session cookie might have expired")
        if status >= 500:
            raise Transient(f"HTTP {status} for {year}/{leaderboard_id}")
        if status != 200:
            raise Malformed(f"unexpected HTTP {status} for {year}/{leaderboard_id}")

        try:
            payload = r.json()
        except ValueError as e:
            raise Malformed(f"response body is not JSON: {str(e)[:100]}") from e
        return parse_snapshot(payload, year, leaderboard_id, fetched_at=utc_now())


def build_http_session() -> requests.Session:
    http = requests.Session()
    http.headers["User-Agent"] = USER_AGENT
    return http


# =============================================================================
# Webhook notifier
# =============================================================================

class WebhookNotifier:
    """Posts Discord-style messages to one webhook URL.

    An unset URL turns notify() into a logged no-op. 429 responses are honoured
    by sleeping for the advertised retry_after and trying again.
    """

    def __init__(self, url: Optional[str], name: str = "notify",
                 http: Optional[requests.Session] = None, timeout_s: int = 10,
                 max_rate_limit_retries: int = 5,
                 sleep: Callable[[float], None] = time.sleep):
        self.url = (url or "").strip() or None
        self.name = name
        self.http = http or build_http_session()
        self.timeout_s = timeout_s
        self.max_rate_limit_retries = max_rate_limit_retries
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return self.url is not None

    def notify(self, message: str, attachments: Sequence[Tuple[str, bytes]] = ()) -> None:
        print(f"  webhook[{self.name}]: {message!r}")
        if not self.url:
            print(f"  [SKIP] {self.name} webhook not set, not sending")
            return

        for _ in range(self.max_rate_limit_retries + 1):
            try:
                r = self._post(message, attachments)
            except requests.RequestException as e:
                raise NotifyTransient(f"{self.name}: {type(e).__name__}: {str(e)[:200]}") from e

            if r.status_code in (200, 204):
                return
            if r.status_code == 429:
                retry = self._retry_after(r)
                print(f"  [WARN] {self.name} webhook rate-limited for {retry}s, retrying")
                self._sleep(retry)
                continue
            if r.status_code >= 500:
                raise NotifyTransient(f"{self.name}: HTTP {r.status_code}")
            raise NotifyRejected(f"{self.name}: HTTP {r.status_code}: {r.text[:200]}")

        raise NotifyTransient(f"{self.name}: still rate-limited after {self.max_rate_limit_retries} retries")

    def _post(self, message: str, attachments: Sequence[Tuple[str, bytes]]) -> requests.Response:
        if not attachments:
            return self.http.post(self.url, json={"content": message}, timeout=self.timeout_s)
        files = {f"files[{i}]": (filename, content) for i, (filename, content) in enumerate(attachments)}
        return self.http.post(self.url, data={"payload_json": json.dumps({"content": message})},
                              files=files, timeout=self.timeout_s)

    @staticmethod
    def _retry_after(r: requests.Response) -> float:
        try:
            body = r.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("retry_after"), (int, float)):
            return max(0.0, float(body["retry_after"]))
        try:
            return max(0.0, float(r.headers.get("Retry-After", 0)))
        except (TypeError, ValueError):
            return 0.0


# =============================================================================
# Orchestrator
# =============================================================================

@dataclass
class CycleReport:
    instant: datetime
    polled_years: List[int] = field(default_factory=list)
    events_sent: int = 0
    errors: List[str] = field(default_factory=list)


class FestiveBot:
    """Runs cycles: wait, then fetch -> diff -> notify -> persist per year,
    then December announcements for the current year, then heartbeat."""

    def __init__(self, leaderboard_id: str, client: LeaderboardClient,
                 store: WatermarkStore, notifier: WebhookNotifier,
                 status: WebhookNotifier, config: ScheduleConfig,
                 all_years: bool = False, clock: Optional[SystemClock] = None):
        self.leaderboard_id = leaderboard_id
        self.client = client
        self.store = store
        self.notifier = notifier
        self.status = status
        self.config = config
        self.all_years = all_years
        self.clock = clock or SystemClock()
        self.live_years: List[int] = []

    # --- status reporting ---

    def send_status(self, message: str, attachments: Sequence[Tuple[str, bytes]] = ()) -> None:
        """Best-effort status message; delivery failures are printed, never raised."""
        try:
            self.status.notify(message, attachments)
        except NotifyError as e:
            print(f"  [WARN] status message not delivered: {e}")

    def report_error(self, report: CycleReport, message: str) -> None:
        print(f"  [ERROR] {message}")
        report.errors.append(message)
        self.send_status(f"⚠ {message}")

    def _send(self, report: CycleReport, message: str,
              attachments: Sequence[Tuple[str, bytes]] = ()) -> bool:
        try:
            self.notifier.notify(message, attachments)
            return True
        except NotifyError as e:
            self.report_error(report, f"notification failed: {e}")
            return False

    # --- lifecycle ---

    def initialise(self) -> None:
        print(f"[{utc_now_iso()}] Festive Bot v{__version__} -- initialising")
        self.send_status(f"Festive Bot v{__version__} is initialising...")
        self.live_years = live_years_at(self.clock.now())
        params = (f"leaderboard: {self.leaderboard_id}\n"
                  f"all years:   {self.all_years}\n"
                  f"period:      {self.config.period_minutes}\n"
                  f"standings:   {self.config.standings_interval_minutes}\n"
                  f"heartbeat:   {self.config.heartbeat_interval_minutes or None}\n"
                  f"live years:  {self.live_years}\n")
        print(params, end="")
        self.send_status("Initialisation successful!", [("params.txt", params.encode("utf-8"))])

    def run(self, once: bool = False) -> None:
        self.initialise()
        if once:
            self.run_cycle(current_cycle(self.clock.now(), self.config))
            return

        while not self.clock.cancelled:
            decision = compute_next_cycle(self.clock.now(), self.config)
            print(f"\n[{utc_now_iso()}] sleeping until {format_rfc3339(decision.next_instant)}")
            if not self.clock.wait_until(decision.next_instant):
                break
            self.run_cycle(decision)

        print(f"[{utc_now_iso()}] received termination signal, exiting...")
        self.send_status("Received termination signal, exiting!")

    def years_to_poll(self, year: int) -> List[int]:
        return [y for y in self.live_years if self.all_years or y == year]

    def run_cycle(self, decision: CycleDecision) -> CycleReport:
        instant = decision.next_instant
        year = instant.year
        report = CycleReport(instant=instant)
        print(f"[{utc_now_iso()}] cycle {format_rfc3339(instant)}")

        # Any cycle at or after the first unlock joins the year; the exact 1 Dec instant may be skipped
        if instant >= puzzle_unlock(year, 1) and year not in self.live_years:
            self.live_years.append(year)
            self.live_years.sort()
            self.send_status(f"Adding {year} to live years!")

        for poll_year in self.years_to_poll(year):
            report.polled_years.append(poll_year)
            snapshot = self.process_year(poll_year, report)
            if poll_year == year and instant.month == 12:
                self.announce_december(decision, snapshot, report)

        if decision.heartbeat_due:
            self.send_status(f"Heartbeat {format_rfc3339(instant)}")

        print(f"  completed cycle: {report.events_sent} event(s), {len(report.errors)} error(s)")
        return report

    def process_year(self, year: int, report: CycleReport) -> Optional[Snapshot]:
        """fetch -> diff -> notify -> persist for one year. Returns the snapshot, if fetched."""
        print(f"  fetching leaderboard for {year}")
        try:
            snapshot = self.client.fetch(year, self.leaderboard_id)
        except FetchError as e:
            self.report_error(report, f"[{year}] fetch skipped: {type(e).__name__}: {e}")
            return None
        print(f"  parsed {len(snapshot.records)} record(s)")

        try:
            watermark = self.store.load(year, self.leaderboard_id)
        except PersistenceError as e:
            self.report_error(report, f"[{year}] watermark unreadable, not diffing: {e}")
            return snapshot
        corrupt_files = getattr(self.store, "corrupt_files", None)
        while corrupt_files:
            self.report_error(report, f"[{year}] corrupt watermark discarded: {corrupt_files.pop(0)}")
        print(f"  watermark {format_rfc3339(watermark.last_seen) if watermark.last_seen else '(none)'}")

        result = diff(snapshot, watermark)
        for err in result.errors:
            self.report_error(report, f"[{year}] dropped record: {err}")

        for event in result.events:
            if self._send(report, event.format_message()):
                report.events_sent += 1

        if result.watermark != watermark:
            try:
                self.store.store(result.watermark)
                print(f"  updated watermark to {format_rfc3339(result.watermark.last_seen)}")
            except PersistenceError as e:
                self.report_error(report, f"[{year}] watermark not advanced, events may repeat: {e}")
        return snapshot

    def announce_december(self, decision: CycleDecision, snapshot: Optional[Snapshot],
                          report: CycleReport) -> None:
        instant = decision.next_instant
        year = instant.year

        if decision.unlock_day is not None:
            if decision.unlock_day == 1:
                self._send(report, f"🎄 [{year}] Advent of Code is now live! 🎉")
            self._send(report, f"🎄 [{year}] Puzzle {decision.unlock_day:02d} is now unlocked! 🔓")

        if decision.standings_due:
            if snapshot is None:
                print(f"  [SKIP] standings for {year}: no snapshot this cycle")
            else:
                text = format_standings(compute_standings(snapshot.records, year))
                self._send(report, f"🎄 [{year}] Current Standings 🏆",
                           [(f"standings_{year}_12_{instant.day:02d}.txt", text.encode("utf-8"))])

        if decision.year_end:
            self._send(report, f"🎄 [{year}] Festive Bot signing off. Happy New Year! 👋")


# =============================================================================
# PID lockfile — one bot per state directory
# =============================================================================

_lock_fd = None  # must stay open for process lifetime


def acquire_instance_lock(state_dir: Path) -> bool:
    """Acquire exclusive instance lock. Returns True if acquired, exits if another instance running."""
    global _lock_fd
    lock_path = state_dir / ".festive_bot.lock"
    mkdirp(state_dir)
    _lock_fd = open(lock_path, "w")
    try:
        fcntl.flock(_lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except (BlockingIOError, OSError):
        print("[SKIP] Another festive bot instance is running.")
        sys.exit(0)


# =============================================================================
# Configuration
# =============================================================================

ENV_LEADERBOARD = "FESTIVE_BOT_LEADERBOARD"
ENV_SESSION = "FESTIVE_BOT_SESSION"
ENV_NOTIFY = "FESTIVE_BOT_NOTIFY"
ENV_STATUS = "FESTIVE_BOT_STATUS"
ENV_STATE_DIR = "FESTIVE_BOT_STATE_DIR"


@dataclass(frozen=True)
class Settings:
    leaderboard_id: str
    session: str
    notify_url: Optional[str]
    status_url: Optional[str]
    state_dir: Path

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        missing = [k for k in (ENV_LEADERBOARD, ENV_SESSION) if not env.get(k, "").strip()]
        if missing:
            raise ConfigError(f"missing environment variable(s): {', '.join(missing)}")
        return cls(
            leaderboard_id=env[ENV_LEADERBOARD].strip(),
            session=env[ENV_SESSION].strip(),
            notify_url=env.get(ENV_NOTIFY, "").strip() or None,
            status_url=env.get(ENV_STATUS, "").strip() or None,
            state_dir=Path(env.get(ENV_STATE_DIR, "").strip() or ".").resolve(),
        )


def _minutes(lo: int, hi: int) -> Callable[[str], int]:
    def parse(text: str) -> int:
        try:
            value = int(text)
        except ValueError:
            raise argparse.ArgumentTypeError(f"{text!r} is not a whole number of minutes") from None
        if not lo <= value <= hi:
            raise argparse.ArgumentTypeError(f"{value} is outside {lo}..{hi} minutes")
        return value
    return parse


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="festive_bot", description="Advent of Code private leaderboard watcher")
    parser.add_argument("--all-years", action="store_true",
                        help="Report completions for every live year, not only the current one")
    parser.add_argument("--period", type=_minutes(MIN_PERIOD_MINUTES, MINUTES_PER_DAY), default=60, metavar="MINS",
                        help="Polling period in minutes (15..1440, default 60); rounded up to the next factor of one day")
    parser.add_argument("--standings", type=_minutes(1, MINUTES_PER_WEEK), default=MINUTES_PER_DAY, metavar="MINS",
                        help="Interval between December standings (default 1440); rounded up to a multiple of the period")
    parser.add_argument("--heartbeat", type=_minutes(1, MINUTES_PER_WEEK), default=None, metavar="MINS",
                        help="Interval between heartbeat status messages (default off); rounded up to a multiple of the period")
    parser.add_argument("--once", action="store_true",
                        help="Run a single cycle for the current period and exit (for cron)")
    return parser


def schedule_from_args(args: argparse.Namespace) -> ScheduleConfig:
    period = round_period(args.period)
    heartbeat = round_to_multiple(args.heartbeat, period) if args.heartbeat else 0
    return ScheduleConfig(
        period_minutes=period,
        standings_interval_minutes=round_to_multiple(args.standings, period),
        heartbeat_interval_minutes=heartbeat,
    )


# =============================================================================
# Main
# =============================================================================

def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
        config = schedule_from_args(args)
    except ConfigError as e:
        print(f"[ERROR] {e}")
        sys.exit(1)

    http = build_http_session()
    status = WebhookNotifier(settings.status_url, name="status", http=http)
    bot = FestiveBot(
        leaderboard_id=settings.leaderboard_id,
        client=LeaderboardClient(settings.session, http=http),
        store=FileWatermarkStore(settings.state_dir),
        notifier=WebhookNotifier(settings.notify_url, name="notify", http=http),
        status=status,
        config=config,
        all_years=args.all_years,
    )

    acquire_instance_lock(settings.state_dir)

    def _on_signal(signum, _frame) -> None:
        print(f"\n  received signal {signum}")
        bot.clock.cancel()

    for signame in ("SIGINT", "SIGTERM", "SIGHUP"):
        if hasattr(signal, signame):
            signal.signal(getattr(signal, signame), _on_signal)

    try:
        bot.run(once=args.once)
    except Exception as e:
        print(f"[ERROR] unrecoverable: {type(e).__name__}: {e}")
        bot.send_status("⚠ Festive Bot experienced an unrecoverable error, exiting!")
        bot.send_status(f"⚠ Error: {type(e).__name__}: {str(e)[:300]}")
        sys.exit(1)


def cli() -> None:
    # Load .env from script directory if available
    env_path = Path(__file__).resolve().parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()  # try default locations
    main()


if __name__ == "__main__":
    cli()
