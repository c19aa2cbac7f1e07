# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "rich",
#   "tzdata",
# ]
# ///
"""Lighthouse Scheduled Audit CLI Tool.

Runs a Lighthouse performance audit three times per URL during business
hours, aggregates each batch into a geometric-mean sample, and appends
every run to a CSV log. Outside the run window the loop pauses and picks
up again at the same URL once the window reopens.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import math
import os
import signal
import sys
import tomllib
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
import pandas as pd
from rich.console import Console
from rich.markup import escape
from rich.table import Table

__version__ = "1.0.0"

out_console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PAGESPEED_TIMEOUT = 120.0

VALID_RUNNERS = ("lighthouse", "pagespeed")
VALID_STRATEGIES = ("mobile", "desktop")

# Batch size for geometric-mean aggregation, not a retry count.
SAMPLES_PER_URL = 3

DEFAULT_RUNNER = "lighthouse"
DEFAULT_STRATEGY = "mobile"
DEFAULT_TIMEZONE = "Australia/Sydney"
DEFAULT_WINDOW_START = 9
DEFAULT_WINDOW_END = 18
DEFAULT_WEEKEND_DAYS = (5, 6)  # Saturday, Sunday
DEFAULT_POLL_INTERVAL = 60.0
DEFAULT_ATTEMPT_TIMEOUT = 180.0
DEFAULT_OUTPUT_DIR = "./storedLogs"
DEFAULT_LIGHTHOUSE_PATH = "lighthouse"
DEFAULT_CHROME_FLAGS = ("--headless",)
DEFAULT_SHUTDOWN_GRACE = 5.0

RESULTS_FILENAME = "logged-results.csv"

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRYABLE_STATUS_CODES = {429, 500, 503}

CONFIG_FILENAMES = ["lh-audit.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lh-audit",
]

GMEAN_PREFIX = "GMEAN: "

# Timed metrics: (sample_field, audit_id, csv_column, weight)
# Weights follow the Lighthouse v5 performance category.
TIMED_METRICS = [
    ("first_contentful_paint", "first-contentful-paint", "fcp", 3 / 15),
    ("first_meaningful_paint", "first-meaningful-paint", "fmp", 1 / 15),
    ("speed_index", "speed-index", "speed", 4 / 15),
    ("first_cpu_idle", "first-cpu-idle", "cpu", 2 / 15),
    ("time_to_interactive", "interactive", "tti", 5 / 15),
]

CSV_COLUMNS = {
    "site": "SITE URL",
    "type": "TYPE",
    "p": "PERFORMANCE SCORE",
    "fcp": "FIRST CONTENTFUL PAINT",
    "fmp": "FIRST MEANINGFUL PAINT",
    "speed": "SPEED INDEX",
    "cpu": "FIRST CPU IDLE",
    "tti": "TIME TO INTERACTIVE",
    "size": "TOTAL BYTE WEIGHT",
}

MISSING_VALUE = "-"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AuditError(Exception):
    """Raised when a single audit attempt cannot produce a sample."""


class SinkError(Exception):
    """Raised when a run record cannot be persisted."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricSample:
    """Condensed metrics from one Lighthouse run.

    Times are in milliseconds, byte weight in bytes, ``*_score`` fields in
    [0, 1]. Audits the engine did not report are ``None``.
    """

    performance_score: float
    first_contentful_paint: float | None = None
    first_contentful_paint_score: float | None = None
    first_meaningful_paint: float | None = None
    first_meaningful_paint_score: float | None = None
    speed_index: float | None = None
    speed_index_score: float | None = None
    time_to_interactive: float | None = None
    time_to_interactive_score: float | None = None
    first_cpu_idle: float | None = None
    first_cpu_idle_score: float | None = None
    total_byte_weight: float | None = None


METRIC_FIELDS = tuple(f.name for f in fields(MetricSample))


@dataclass(frozen=True)
class AggregateSample(MetricSample):
    """Geometric mean of a batch of samples."""

    sample_count: int = 1


class RecordKind(Enum):
    PARTIAL = "PARTIAL"
    AGGREGATE = "GMEAN"
    ERROR = "Error: site not loaded"


@dataclass(frozen=True)
class RunRecord:
    url: str
    kind: RecordKind
    sample: MetricSample | None = None


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def geometric_mean(values: Sequence[float]) -> float:
    """Return the geometric mean of non-negative values.

    Any zero makes the product zero, so the mean is 0.0 without taking logs.
    """
    if not values:
        raise ValueError("geometric_mean requires at least one value")
    if any(value < 0 for value in values):
        raise ValueError(f"geometric_mean requires non-negative values, got {list(values)}")
    if any(value == 0 for value in values):
        return 0.0
    return math.exp(math.fsum(math.log(value) for value in values) / len(values))


def aggregate_samples(samples: Sequence[MetricSample]) -> AggregateSample | None:
    """Combine a batch into one sample, field by field.

    Returns None for an empty batch. Fields missing from every sample stay
    None; otherwise only the reported values are averaged.
    """
    if not samples:
        return None

    aggregated: dict[str, float | None] = {}
    for name in METRIC_FIELDS:
        values = [getattr(sample, name) for sample in samples if getattr(sample, name) is not None]
        aggregated[name] = geometric_mean(values) if values else None

    return AggregateSample(**aggregated, sample_count=len(samples))


# ---------------------------------------------------------------------------
# Lighthouse Result Handling
# ---------------------------------------------------------------------------


def _numeric(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def condense_report(lhr: dict) -> MetricSample:
    """Extract the metrics we track from a Lighthouse result (LHR) dict."""
    runtime_error = lhr.get("runtimeError") or {}
    if runtime_error.get("code") not in (None, "NO_ERROR"):
        raise AuditError(f"Lighthouse runtime error {runtime_error.get('code')}: {runtime_error.get('message', '')}")

    score = _numeric(lhr.get("categories", {}).get("performance", {}).get("score"))
    if score is None:
        raise AuditError("Lighthouse result has no performance score")

    audits = lhr.get("audits", {})
    values: dict[str, float | None] = {"performance_score": score}
    for field_name, audit_id, _, _ in TIMED_METRICS:
        audit = audits.get(audit_id, {})
        values[field_name] = _numeric(audit.get("numericValue"))
        values[f"{field_name}_score"] = _numeric(audit.get("score"))
    values["total_byte_weight"] = _numeric(audits.get("total-byte-weight", {}).get("numericValue"))

    return MetricSample(**values)


def artifact_key(lhr: dict) -> str:
    """Stable identifier for a run's raw artifacts."""
    benchmark_index = lhr.get("environment", {}).get("benchmarkIndex")
    if benchmark_index is not None:
        return f"{benchmark_index}"
    fetch_time = lhr.get("fetchTime") or datetime.now().isoformat()
    return fetch_time.replace(":", "-")


def save_artifacts(lhr: dict, output_dir: Path) -> Path:
    """Write the raw Lighthouse result as JSON. Returns the file path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    artifact_path = output_dir / f"{artifact_key(lhr)}.report.json"
    with open(artifact_path, "w") as fh:
        json.dump(lhr, fh, indent=2)
    return artifact_path


def _store_artifacts(lhr: dict, artifacts_dir: Path | None) -> None:
    if artifacts_dir is None:
        return
    try:
        save_artifacts(lhr, artifacts_dir)
    except OSError as exc:
        err_console.print(f"Warning: could not store artifacts in {artifacts_dir}: {escape(str(exc))}")


# ---------------------------------------------------------------------------
# Audit Runners
# ---------------------------------------------------------------------------


class AuditRunner(Protocol):
    async def run_once(self, url: str) -> MetricSample: ...


class LighthouseCliRunner:
    """Runs the ``lighthouse`` CLI, which launches and kills its own headless Chrome."""

    def __init__(
        self,
        lighthouse_path: str = DEFAULT_LIGHTHOUSE_PATH,
        chrome_flags: Sequence[str] = DEFAULT_CHROME_FLAGS,
        strategy: str = DEFAULT_STRATEGY,
        artifacts_dir: Path | None = None,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
    ):
        self.lighthouse_path = lighthouse_path
        self.chrome_flags = tuple(chrome_flags)
        self.strategy = strategy
        self.artifacts_dir = artifacts_dir
        self.shutdown_grace = shutdown_grace

    def build_command(self, url: str) -> list[str]:
        command = [
            self.lighthouse_path,
            url,
            "--output=json",
            "--output-path=stdout",
            "--quiet",
            "--only-categories=performance",
            "--throttling-method=devtools",
            f"--chrome-flags={' '.join(self.chrome_flags)}",
        ]
        # Lighthouse emulates mobile unless told otherwise
        if self.strategy == "desktop":
            command.append("--preset=desktop")
        return command

    async def run_once(self, url: str) -> MetricSample:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(url),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AuditError(f"cannot launch {self.lighthouse_path}: {exc}") from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            await self._shutdown(process)
            raise

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[-200:]
            raise AuditError(f"lighthouse exited with code {process.returncode} for {url}: {detail}")

        try:
            lhr = json.loads(stdout)
        except ValueError as exc:
            raise AuditError(f"lighthouse produced invalid JSON for {url}: {exc}") from exc

        sample = condense_report(lhr)
        _store_artifacts(lhr, self.artifacts_dir)
        return sample

    async def _shutdown(self, process: asyncio.subprocess.Process) -> None:
        """Stop an abandoned lighthouse run.

        Lighthouse closes the Chrome it launched only from its own SIGINT
        and exit handlers, so it gets SIGINT first and SIGKILL only once
        ``shutdown_grace`` runs out.
        """
        try:
            process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace)
            return
        except TimeoutError:
            err_console.print(f"  Warning: lighthouse ignored SIGINT for {self.shutdown_grace:g}s; killing it")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()


async def fetch_pagespeed_result(
    url: str,
    strategy: str,
    api_key: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict:
    """Fetch a PageSpeed Insights performance result for a single URL.

    Retries on 429/500/503 and transport errors with exponential backoff.
    """
    if client is None:
        async with httpx.AsyncClient(timeout=PAGESPEED_TIMEOUT) as owned_client:
            return await fetch_pagespeed_result(url, strategy, api_key, client=owned_client)

    params = [("url", url), ("strategy", strategy), ("category", "performance")]
    if api_key:
        params.append(("key", api_key))

    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            response = await client.get(PAGESPEED_API_URL, params=params, timeout=PAGESPEED_TIMEOUT)
        except (httpx.HTTPError, OSError) as exc:
            last_error = exc
            if attempt < MAX_RETRIES:
                await asyncio.sleep(RETRY_BASE_DELAY * (2**attempt))
                continue
            break

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as exc:
                raise AuditError(f"Invalid JSON from PageSpeed for {url} ({strategy}): {exc}") from exc
            if "error" in data:
                message = data["error"].get("message", "unknown error")
                raise AuditError(f"PageSpeed error for {url} ({strategy}): {message}")
            if "lighthouseResult" not in data:
                raise AuditError(f"No lighthouseResult in PageSpeed response for {url} ({strategy})")
            return data

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
            wait_time = RETRY_BASE_DELAY * (2**attempt)
            retry_after = response.headers.get("Retry-After")
            if retry_after and response.status_code == 429:
                try:
                    wait_time = float(retry_after)
                except ValueError:
                    pass
            last_error = AuditError(f"HTTP {response.status_code} for {url} ({strategy})")
            await asyncio.sleep(wait_time)
            continue

        try:
            error_detail = response.json().get("error", {}).get("message", response.text[:200])
        except (ValueError, AttributeError):
            error_detail = response.text[:200]
        raise AuditError(f"HTTP {response.status_code} for {url} ({strategy}): {error_detail}")

    raise AuditError(f"Failed after {MAX_RETRIES + 1} attempts for {url} ({strategy}): {last_error}")


class PageSpeedRunner:
    """Audits through the PageSpeed Insights API instead of a local Chrome."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str | None = None,
        strategy: str = DEFAULT_STRATEGY,
        artifacts_dir: Path | None = None,
    ):
        self.client = client
        self.api_key = api_key
        self.strategy = strategy
        self.artifacts_dir = artifacts_dir

    async def run_once(self, url: str) -> MetricSample:
        response = await fetch_pagespeed_result(url, self.strategy, self.api_key, client=self.client)
        lhr = response["lighthouseResult"]
        sample = condense_report(lhr)
        _store_artifacts(lhr, self.artifacts_dir)
        return sample


def build_runner(
    runner_name: str,
    client: httpx.AsyncClient,
    api_key: str | None = None,
    strategy: str = DEFAULT_STRATEGY,
    lighthouse_path: str = DEFAULT_LIGHTHOUSE_PATH,
    artifacts_dir: Path | None = None,
) -> AuditRunner:
    if runner_name == "pagespeed":
        return PageSpeedRunner(client, api_key=api_key, strategy=strategy, artifacts_dir=artifacts_dir)
    if runner_name == "lighthouse":
        return LighthouseCliRunner(lighthouse_path, strategy=strategy, artifacts_dir=artifacts_dir)
    raise ValueError(f"unknown runner: {runner_name}")


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def colorize_by_score(text: str, score: float | None) -> str:
    if score is None:
        return text
    if score > 0.89:
        return f"[green]{text}[/green]"
    if score > 0.49:
        return f"[yellow]{text}[/yellow]"
    return f"[red]{text}[/red]"


def format_score(score: float | None, colorize: bool = True) -> str:
    if score is None:
        return MISSING_VALUE.rjust(3)
    text = f"{math.floor(score * 100)}".rjust(3)
    return colorize_by_score(text, score) if colorize else text


def format_duration(duration_ms: float | None) -> str:
    if duration_ms is None:
        return MISSING_VALUE
    return f"{duration_ms / 1000:.2f} s"


def format_weight(weight: float) -> str:
    return f"{weight * 100:.1f}"


def format_weighted_score(score: float | None, weight: float) -> str:
    weighted = format_weight(score * weight) if score is not None else MISSING_VALUE
    return f"{weighted}/{format_weight(weight)}"


def format_audit(sample: MetricSample, field_name: str, weight: float, colorize: bool = True) -> str:
    """Render a timed metric as ``"1.23 s (12.0/20.0)"``."""
    audit_score = getattr(sample, f"{field_name}_score")
    text = f"{format_duration(getattr(sample, field_name))} ({format_weighted_score(audit_score, weight)})"
    return colorize_by_score(text, audit_score) if colorize else text


def format_bytes(byte_count: float | None) -> str:
    if byte_count is None:
        return MISSING_VALUE
    kilobytes = math.floor(byte_count / 1000 + 0.5)
    return f"{kilobytes:,} KB"


def oneliner(sample: MetricSample, url: str, colorize: bool = True) -> str:
    """One console line for a run: URL, score, weighted sub-scores, size."""
    def label(text: str) -> str:
        return f"[italic]{text}[/italic]" if colorize else text

    parts = [
        label(escape(url)) if colorize else url,
        f"{label('p:')} {format_score(sample.performance_score, colorize)}",
    ]
    for field_name, _, column, weight in TIMED_METRICS:
        parts.append(f"{label(column + ':')} {format_audit(sample, field_name, weight, colorize)}")
    parts.append(f"{label('size:')} {format_bytes(sample.total_byte_weight)}")
    return ", ".join(parts)


def record_to_row(record: RunRecord) -> dict[str, str]:
    """Map a run record onto CSV column keys. Error rows carry no metrics."""
    row = {"site": record.url, "type": record.kind.value}
    if record.sample is None:
        return row
    sample = record.sample
    row["p"] = format_score(sample.performance_score, colorize=False)
    for field_name, _, column, weight in TIMED_METRICS:
        row[column] = format_audit(sample, field_name, weight, colorize=False)
    row["size"] = format_bytes(sample.total_byte_weight)
    return row


# ---------------------------------------------------------------------------
# Result Sink
# ---------------------------------------------------------------------------


class ResultSink(Protocol):
    def record(self, record: RunRecord) -> None: ...


class CsvResultSink:
    """Append-only CSV log of run records."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def record(self, record: RunRecord) -> None:
        frame = pd.DataFrame([record_to_row(record)], columns=list(CSV_COLUMNS)).rename(columns=CSV_COLUMNS)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_header = not self.path.exists() or self.path.stat().st_size == 0
            frame.to_csv(self.path, mode="a", header=write_header, index=False)
        except OSError as exc:
            raise SinkError(f"cannot append to {self.path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Time Window
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeWindow:
    """Business hours during which audits may run.

    ``start_hour`` and ``end_hour`` are inclusive, so with 9 and 18 the
    window closes at 19:00. ``weekend_days`` uses ``datetime.weekday()``
    numbering (Monday is 0).
    """

    zone: ZoneInfo
    start_hour: int = DEFAULT_WINDOW_START
    end_hour: int = DEFAULT_WINDOW_END
    weekend_days: tuple[int, ...] = DEFAULT_WEEKEND_DAYS

    def now(self) -> datetime:
        return datetime.now(self.zone)

    def localize(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.zone)
        return moment.astimezone(self.zone)

    def is_run_window(self, moment: datetime) -> bool:
        local = self.localize(moment)
        return self.start_hour <= local.hour <= self.end_hour and local.weekday() not in self.weekend_days


def load_time_window(
    zone_name: str,
    start_hour: int = DEFAULT_WINDOW_START,
    end_hour: int = DEFAULT_WINDOW_END,
) -> TimeWindow:
    """Build the run window, exiting on an unknown zone or bad hours."""
    if not (0 <= start_hour <= end_hour <= 23):
        err_console.print(f"Error: invalid run window {start_hour}-{end_hour}; hours must satisfy 0 <= start <= end <= 23")
        sys.exit(1)
    try:
        zone = ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        err_console.print(f"Error: unknown time zone '{escape(zone_name)}': {escape(str(exc))}")
        sys.exit(1)
    return TimeWindow(zone=zone, start_hour=start_hour, end_hour=end_hour)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class SchedulerState(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    SUSPENDED = "suspended"
    DONE = "done"


@dataclass
class RunStats:
    urls_processed: int = 0
    aggregates: int = 0
    errors: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    sink_failures: int = 0
    suspensions: int = 0


@dataclass
class Scheduler:
    """Works through the URL list one batch at a time, inside the run window.

    The loop is an explicit state machine. Each handler receives the
    cursor (index of the next URL) and returns the next state together
    with the cursor it hands on:

    - PROCESSING(i): if the window is closed go to SUSPENDED(i); otherwise
      run the batch for URL i and go to PROCESSING(i + 1). Past the last
      URL go to DONE.
    - SUSPENDED(i): poll the window every ``poll_interval`` seconds and
      return to PROCESSING(i) on the first open check.
    """

    urls: Sequence[str]
    runner: AuditRunner
    sink: ResultSink
    window: TimeWindow
    clock: Callable[[], datetime] | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    attempt_timeout: float | None = DEFAULT_ATTEMPT_TIMEOUT
    verbose: bool = False
    state: SchedulerState = field(default=SchedulerState.IDLE, init=False)
    cursor: int | None = field(default=None, init=False)
    history: list[tuple[SchedulerState, int | None]] = field(default_factory=list, init=False)
    stats: RunStats = field(default_factory=RunStats, init=False)

    def __post_init__(self):
        self.urls = tuple(self.urls)
        if self.clock is None:
            self.clock = self.window.now

    async def run(self) -> RunStats:
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError(f"scheduler already ran (state: {self.state.value})")

        state, cursor = SchedulerState.PROCESSING, 0
        while True:
            self._enter(state, cursor)
            if state is SchedulerState.DONE:
                return self.stats
            if state is SchedulerState.PROCESSING:
                state, cursor = await self._process(cursor)
            else:
                state, cursor = await self._suspend(cursor)

    def _enter(self, state: SchedulerState, cursor: int | None) -> None:
        self.state = state
        self.cursor = cursor
        self.history.append((state, cursor))
        if state is SchedulerState.SUSPENDED:
            self.stats.suspensions += 1
            err_console.print(
                f"Outside the run window; pausing before URL {cursor + 1}/{len(self.urls)}, "
                f"checking every {self.poll_interval:g}s"
            )
        elif self.verbose:
            err_console.print(f"  [dim]state: {state.value} (cursor={cursor})[/dim]")

    def _window_open(self) -> bool:
        return self.window.is_run_window(self.clock())

    async def _process(self, cursor: int) -> tuple[SchedulerState, int | None]:
        if cursor >= len(self.urls):
            return SchedulerState.DONE, None
        if not self._window_open():
            return SchedulerState.SUSPENDED, cursor
        await self.process_url(self.urls[cursor])
        self.stats.urls_processed += 1
        return SchedulerState.PROCESSING, cursor + 1

    async def _suspend(self, cursor: int) -> tuple[SchedulerState, int]:
        while True:
            await asyncio.sleep(self.poll_interval)
            if self._window_open():
                err_console.print(f"Run window open; resuming at URL {cursor + 1}/{len(self.urls)}")
                return SchedulerState.PROCESSING, cursor

    async def _attempt(self, url: str) -> MetricSample:
        if self.attempt_timeout is None:
            return await self.runner.run_once(url)
        try:
            return await asyncio.wait_for(self.runner.run_once(url), timeout=self.attempt_timeout)
        except TimeoutError as exc:
            raise AuditError(f"audit of {url} timed out after {self.attempt_timeout:g}s") from exc

    async def process_url(self, url: str) -> AggregateSample | None:
        """Run one batch for ``url`` and persist its partial, aggregate or error records."""
        samples: list[MetricSample] = []
        for attempt in range(1, SAMPLES_PER_URL + 1):
            if self.verbose:
                err_console.print(f"  Auditing {escape(url)} (run {attempt}/{SAMPLES_PER_URL})...")
            try:
                sample = await self._attempt(url)
            except AuditError as exc:
                self.stats.failed_attempts += 1
                err_console.print(f"  Error: {escape(str(exc))}")
                continue
            self.stats.successful_attempts += 1
            samples.append(sample)
            self._persist(RunRecord(url, RecordKind.PARTIAL, sample))
            out_console.print(" " * len(GMEAN_PREFIX) + oneliner(sample, url), soft_wrap=True)

        aggregate = aggregate_samples(samples)
        if aggregate is None:
            self.stats.errors += 1
            self._persist(RunRecord(url, RecordKind.ERROR))
            err_console.print(f"Logged error: {escape(url)} did not load in {SAMPLES_PER_URL} attempts")
            return None

        self.stats.aggregates += 1
        out_console.print(f"[bold]{GMEAN_PREFIX}[/bold]{oneliner(aggregate, url)}", soft_wrap=True)
        self._persist(RunRecord(url, RecordKind.AGGREGATE, aggregate))
        return aggregate

    def _persist(self, record: RunRecord) -> None:
        try:
            self.sink.record(record)
        except SinkError as exc:
            self.stats.sink_failures += 1
            err_console.print(f"  Warning: {record.kind.name.lower()} record for {escape(record.url)} not saved: {escape(str(exc))}")


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        err_console.print(f"Error: malformed config file {config_path}: {escape(str(exc))}")
        sys.exit(1)
    except OSError as exc:
        err_console.print(f"Error: cannot read config file {config_path}: {escape(str(exc))}")
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            err_console.print(f"Error: profile '{profile_name}' not found in config. Available: {available}")
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "urls": "config_urls",
        "urls_file": "file",
        "runner": "runner",
        "strategy": "strategy",
        "lighthouse_path": "lighthouse_path",
        "timezone": "timezone",
        "window_start": "window_start",
        "window_end": "window_end",
        "poll_interval": "poll_interval",
        "attempt_timeout": "attempt_timeout",
        "output_dir": "output_dir",
        "store_logs": "store_logs",
        "ignore_window": "ignore_window",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def _add_window_arguments(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--timezone", dest="timezone", action=TrackingAction, default=DEFAULT_TIMEZONE, help=f"IANA time zone of the run window (default: {DEFAULT_TIMEZONE})")
    subparser.add_argument("--window-start", dest="window_start", action=TrackingAction, type=int, default=DEFAULT_WINDOW_START, help=f"First hour of the run window, inclusive (default: {DEFAULT_WINDOW_START})")
    subparser.add_argument("--window-end", dest="window_end", action=TrackingAction, type=int, default=DEFAULT_WINDOW_END, help=f"Last hour of the run window, inclusive (default: {DEFAULT_WINDOW_END})")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="lh-audit",
        description="Scheduled Lighthouse performance audits with geometric-mean aggregation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="PageSpeed API key for --runner pagespeed (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Audit URLs during the run window, three runs per URL")
    run_parser.add_argument("urls", nargs="*", default=[], help="URLs to audit")
    run_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one URL per line")
    run_parser.add_argument("-s", "--store-logs", dest="store_logs", action=TrackingStoreTrueAction, default=False, help="Store raw Lighthouse results in the output directory")
    run_parser.add_argument("--runner", dest="runner", action=TrackingAction, default=DEFAULT_RUNNER, choices=VALID_RUNNERS, help="Audit engine: local lighthouse CLI or PageSpeed Insights API")
    run_parser.add_argument("--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=VALID_STRATEGIES, help="Emulated device: mobile or desktop")
    run_parser.add_argument("--lighthouse-path", dest="lighthouse_path", action=TrackingAction, default=DEFAULT_LIGHTHOUSE_PATH, help="Path to the lighthouse executable")
    _add_window_arguments(run_parser)
    run_parser.add_argument("--ignore-window", dest="ignore_window", action=TrackingStoreTrueAction, default=False, help="Run regardless of the time window")
    run_parser.add_argument("--poll-interval", dest="poll_interval", action=TrackingAction, type=float, default=DEFAULT_POLL_INTERVAL, help="Seconds between window checks while paused (default: 60)")
    run_parser.add_argument("--attempt-timeout", dest="attempt_timeout", action=TrackingAction, type=float, default=DEFAULT_ATTEMPT_TIMEOUT, help="Seconds before a single audit run is abandoned (default: 180)")
    run_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help=f"Directory for the results CSV and stored logs (default: {DEFAULT_OUTPUT_DIR})")

    # --- window ---
    window_parser = subparsers.add_parser("window", help="Show whether now is inside the run window")
    _add_window_arguments(window_parser)

    # --- summary ---
    summary_parser = subparsers.add_parser("summary", help="Summarize the results CSV per site")
    summary_parser.add_argument("input_file", nargs="?", default=None, help=f"Results CSV (default: <output-dir>/{RESULTS_FILENAME})")
    summary_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory holding the results CSV")

    return parser


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return url


def load_urls(
    url_args: list[str],
    file_path: str | None,
    config_urls: Iterable[str] | None = None,
    allow_stdin: bool = True,
) -> list[str]:
    """Load URLs from positional args, a file, the config, or stdin. Returns validated list."""
    raw_urls: list[str] = []

    if url_args:
        raw_urls.extend(url_args)
    elif file_path:
        path = Path(file_path)
        if not path.is_file():
            err_console.print(f"Error: URL file not found: {file_path}")
            sys.exit(1)
        raw_urls.extend(path.read_text().splitlines())
    elif config_urls:
        raw_urls.extend(config_urls)
    elif allow_stdin and not sys.stdin.isatty():
        raw_urls.extend(sys.stdin.read().splitlines())

    seen: set[str] = set()
    validated: list[str] = []
    for raw in raw_urls:
        cleaned = validate_url(raw)
        if cleaned:
            if cleaned not in seen:
                seen.add(cleaned)
                validated.append(cleaned)
        elif raw.strip() and not raw.strip().startswith("#"):
            err_console.print(f"Warning: skipping invalid URL: {escape(raw.strip())}")

    if not validated:
        err_console.print("Error: no valid URLs provided.")
        sys.exit(1)

    return validated


# ---------------------------------------------------------------------------
# Results Summary
# ---------------------------------------------------------------------------


def load_results(file_path: str | Path) -> pd.DataFrame:
    """Load the results CSV with every column as text."""
    path = Path(file_path)
    if not path.is_file():
        err_console.print(f"Error: results file not found: {file_path}")
        sys.exit(1)
    try:
        return pd.read_csv(path, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        return pd.DataFrame(columns=list(CSV_COLUMNS.values()))


def summarize_results(dataframe: pd.DataFrame) -> pd.DataFrame:
    """Per-site record counts and the latest GMEAN performance score."""
    site_col, type_col, score_col = CSV_COLUMNS["site"], CSV_COLUMNS["type"], CSV_COLUMNS["p"]
    columns = ["site", "partial", "gmean", "errors", "latest_score"]
    if dataframe.empty:
        return pd.DataFrame(columns=columns)

    rows = []
    for site, group in dataframe.groupby(site_col, sort=False):
        kinds = group[type_col]
        gmean_rows = group[kinds == RecordKind.AGGREGATE.value]
        scores = pd.to_numeric(gmean_rows[score_col].str.strip(), errors="coerce").dropna()
        rows.append({
            "site": site,
            "partial": int((kinds == RecordKind.PARTIAL.value).sum()),
            "gmean": len(gmean_rows),
            "errors": int((kinds == RecordKind.ERROR.value).sum()),
            "latest_score": int(scores.iloc[-1]) if len(scores) > 0 else None,
        })
    return pd.DataFrame(rows, columns=columns)


def format_summary_table(summary: pd.DataFrame) -> Table:
    table = Table(title="Audit results")
    table.add_column("Site")
    table.add_column("Runs", justify="right")
    table.add_column("GMEAN", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Latest score", justify="right")
    for _, row in summary.iterrows():
        latest = row["latest_score"]
        if latest is None or pd.isna(latest):
            latest_text = MISSING_VALUE
        else:
            latest_text = colorize_by_score(f"{int(latest)}", int(latest) / 100)
        table.add_row(escape(str(row["site"])), str(row["partial"]), str(row["gmean"]), str(row["errors"]), latest_text)
    return table


def _print_run_summary(stats: RunStats, results_path: Path) -> None:
    """Print run totals to stderr."""
    err_console.print("\nSummary:")
    err_console.print(f"  URLs processed:  {stats.urls_processed}")
    err_console.print(f"  Aggregates:      {stats.aggregates}")
    err_console.print(f"  Errors:          {stats.errors}")
    err_console.print(f"  Failed runs:     {stats.failed_attempts}")
    if stats.suspensions:
        err_console.print(f"  Pauses:          {stats.suspensions}")
    if stats.sink_failures:
        err_console.print(f"  Unsaved records: {stats.sink_failures}")
    err_console.print(f"Results appended to: {results_path}")


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------


async def cmd_run(args: argparse.Namespace) -> RunStats:
    """Audit every URL during the run window and log the results."""
    urls = load_urls(
        getattr(args, "urls", []),
        getattr(args, "file", None),
        config_urls=getattr(args, "config_urls", None),
    )
    window = load_time_window(args.timezone, args.window_start, args.window_end)
    if getattr(args, "ignore_window", False):
        window = replace(window, start_hour=0, end_hour=23, weekend_days=())

    if args.poll_interval <= 0:
        err_console.print("Error: --poll-interval must be positive")
        sys.exit(1)
    attempt_timeout = args.attempt_timeout if args.attempt_timeout and args.attempt_timeout > 0 else None

    output_dir = Path(args.output_dir)
    sink = CsvResultSink(output_dir / RESULTS_FILENAME)
    artifacts_dir = output_dir if getattr(args, "store_logs", False) else None

    err_console.print(
        f"Auditing {len(urls)} URL(s) x {SAMPLES_PER_URL} runs with {args.runner} "
        f"(window {window.start_hour}:00-{window.end_hour}:59 {window.zone.key})"
    )
    async with httpx.AsyncClient(timeout=PAGESPEED_TIMEOUT) as client:
        runner = build_runner(
            args.runner,
            client,
            api_key=getattr(args, "api_key", None),
            strategy=getattr(args, "strategy", DEFAULT_STRATEGY),
            lighthouse_path=getattr(args, "lighthouse_path", DEFAULT_LIGHTHOUSE_PATH),
            artifacts_dir=artifacts_dir,
        )
        scheduler = Scheduler(
            urls,
            runner,
            sink,
            window,
            poll_interval=args.poll_interval,
            attempt_timeout=attempt_timeout,
            verbose=getattr(args, "verbose", False),
        )
        stats = await scheduler.run()

    _print_run_summary(stats, sink.path)
    return stats


# ---------------------------------------------------------------------------
# Subcommand: window
# ---------------------------------------------------------------------------


def cmd_window(args: argparse.Namespace) -> None:
    """Print the local time in the window's zone and exit 0 if open, 1 if closed."""
    window = load_time_window(args.timezone, args.window_start, args.window_end)
    now = window.now()
    is_open = window.is_run_window(now)
    status = "[green]open[/green]" if is_open else "[red]closed[/red]"
    out_console.print(f"{now:%a %Y-%m-%d %H:%M} {window.zone.key}: run window {status}")
    sys.exit(0 if is_open else 1)


# ---------------------------------------------------------------------------
# Subcommand: summary
# ---------------------------------------------------------------------------


def cmd_summary(args: argparse.Namespace) -> None:
    """Print per-site counts and the latest aggregate score from the results CSV."""
    input_file = args.input_file or Path(args.output_dir) / RESULTS_FILENAME
    summary = summarize_results(load_results(input_file))
    if summary.empty:
        err_console.print(f"No records in {input_file}")
        return
    out_console.print(format_summary_table(summary))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    commands = {
        "run": cmd_run,
        "window": cmd_window,
        "summary": cmd_summary,
    }

    handler = commands.get(args.command)
    if not handler:
        parser.print_help()
        sys.exit(1)

    try:
        result = handler(args)
        if asyncio.iscoroutine(result):
            asyncio.run(result)
    except KeyboardInterrupt:
        err_console.print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
