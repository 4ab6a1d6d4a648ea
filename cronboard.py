#!/usr/bin/env python3
"""
cronboard.py

Agenda and week-calendar projections for cron jobs exported by an automation CLI.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None


LOG_FILE = "cronboard.log"
DEFAULT_CONFIG = "cronboard.yaml"
DEFAULT_DATA_DIR = "data"
JOBS_FILE = "cron-jobs.json"
AGENTS_FILE = "agents.json"
META_FILE = "meta.json"
DEFAULT_LOOKAHEAD_DAYS = 7
DEFAULT_WEEK_STARTS_ON = 1
DEFAULT_REFRESH_TIMEOUT_SECONDS = 60
DEFAULT_JOBS_COMMAND = ["openclaw", "cron", "list", "--all", "--json"]
DEFAULT_AGENTS_COMMAND = ["openclaw", "agents", "list", "--json"]

MAX_RUNS_PER_JOB = 20
MAX_RUNS_PER_NOISY_JOB = 7
MAX_ITERATIONS_PER_JOB = 500
MAX_AGENDA_ITEMS_TOTAL = 250
OVERSHOOT_MULTIPLIER = 6
NOISY_INTERVAL_MINUTES = 120
CURSOR_STEP = timedelta(seconds=1)
MAX_EVALUATOR_SKIPS = 16

DEFAULT_AGENT_ID = "(default)"
PLACEHOLDER = "-"
JOB_LIST_KEYS = ("jobs", "data", "list", "items")
AGENT_LIST_KEYS = ("agents", "data", "list", "items")

DAY_NAME_TO_CRON = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
CRON_TO_DAY_NAME = {v: k for k, v in DAY_NAME_TO_CRON.items()}


class CronboardError(Exception):
    """Base error for cronboard."""


class ConfigError(CronboardError):
    """Config validation error."""


class DataError(CronboardError):
    """Job snapshot could not be read."""


class RefreshError(CronboardError):
    """Listing command failed or produced unusable output."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("cronboard")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    timezone: Optional[str] = None

    @property
    def kind(self) -> str:
        return "cron"


@dataclass(frozen=True)
class OtherSchedule:
    kind: Optional[str] = None


Schedule = Union[CronSchedule, OtherSchedule]


@dataclass(frozen=True)
class JobStatus:
    next_run_at_ms: Optional[int] = None
    last_run_at_ms: Optional[int] = None
    last_status: Optional[str] = None


@dataclass(frozen=True)
class CronJob:
    id: str
    name: str
    agent_id: Optional[str] = None
    enabled: bool = False
    schedule: Schedule = field(default_factory=OtherSchedule)
    state: JobStatus = field(default_factory=JobStatus)
    thinking: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id or PLACEHOLDER

    @property
    def agent_label(self) -> str:
        return self.agent_id or DEFAULT_AGENT_ID

    @property
    def status(self) -> str:
        return self.state.last_status or PLACEHOLDER


@dataclass(frozen=True)
class ProjectionLimits:
    max_runs_per_job: int = MAX_RUNS_PER_JOB
    max_runs_per_noisy_job: int = MAX_RUNS_PER_NOISY_JOB
    max_iterations_per_job: int = MAX_ITERATIONS_PER_JOB
    max_items_total: int = MAX_AGENDA_ITEMS_TOTAL
    overshoot_multiplier: int = OVERSHOOT_MULTIPLIER
    noisy_interval: timedelta = timedelta(minutes=NOISY_INTERVAL_MINUTES)

    @property
    def overshoot_limit(self) -> int:
        return self.max_runs_per_job * self.overshoot_multiplier


DEFAULT_LIMITS = ProjectionLimits()


@dataclass(frozen=True)
class RunProjection:
    runs: Tuple[datetime, ...]
    was_capped: bool = False
    iteration_bound_hit: bool = False


@dataclass(frozen=True)
class AgendaItem:
    run_at: datetime
    job: CronJob
    was_capped: bool

    @property
    def schedule_expr(self) -> str:
        return cron_expression(self.job) or ""

    @property
    def schedule_tz(self) -> str:
        schedule = self.job.schedule
        if isinstance(schedule, CronSchedule):
            return schedule.timezone or ""
        return ""

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "runAt": self.run_at.astimezone(UTC).isoformat(),
            "jobId": self.job.id,
            "jobName": self.job.display_name,
            "agentId": self.job.agent_label,
            "enabled": self.job.enabled,
            "status": self.job.status,
            "scheduleExpr": self.schedule_expr,
            "wasCapped": self.was_capped,
        }
        if self.schedule_tz:
            payload["scheduleTz"] = self.schedule_tz
        return payload


@dataclass(frozen=True)
class DayGroup:
    key: str
    heading: str
    items: Tuple[AgendaItem, ...]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "heading": self.heading,
            "items": [item.to_payload() for item in self.items],
        }


@dataclass(frozen=True)
class AgendaView:
    start: datetime
    end: datetime
    total: int
    shown: int
    was_globally_capped: bool
    groups: Tuple[DayGroup, ...]

    @property
    def items(self) -> List[AgendaItem]:
        return [item for group in self.groups for item in group.items]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "windowStart": self.start.astimezone(UTC).isoformat(),
            "windowEnd": self.end.astimezone(UTC).isoformat(),
            "total": self.total,
            "shown": self.shown,
            "wasGloballyCapped": self.was_globally_capped,
            "groups": [group.to_payload() for group in self.groups],
        }


@dataclass(frozen=True)
class WeekDaySlot:
    key: str
    day: date
    heading: str
    items: Tuple[AgendaItem, ...]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "heading": self.heading,
            "count": len(self.items),
            "items": [item.to_payload() for item in self.items],
        }


@dataclass(frozen=True)
class WeekView:
    start: datetime
    end: datetime
    total: int
    shown: int
    was_globally_capped: bool
    days: Tuple[WeekDaySlot, ...]

    @property
    def label(self) -> str:
        first = self.days[0].day
        last = self.days[-1].day
        return f"{first:%b} {first.day} - {last:%b} {last.day}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "windowStart": self.start.astimezone(UTC).isoformat(),
            "windowEnd": self.end.astimezone(UTC).isoformat(),
            "label": self.label,
            "total": self.total,
            "shown": self.shown,
            "wasGloballyCapped": self.was_globally_capped,
            "days": [slot.to_payload() for slot in self.days],
        }


@dataclass(frozen=True)
class DisplaySettings:
    timezone: tzinfo
    timezone_name: str
    week_starts_on: int
    lookahead_days: int


@dataclass(frozen=True)
class RefreshSettings:
    jobs_command: List[str]
    agents_command: List[str]
    timeout: int


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    display: DisplaySettings
    limits: ProjectionLimits
    refresh: RefreshSettings


@dataclass(frozen=True)
class Snapshot:
    jobs: List[CronJob]
    model_by_agent: Dict[str, str]
    generated_at: str


class CronEvaluator(Protocol):
    def next_fire_after(
        self,
        expression: str,
        timezone_name: Optional[str],
        cursor: datetime,
    ) -> Optional[datetime]:
        """Return the first fire time strictly after cursor, or None."""


def require_yaml_dependency() -> None:
    if yaml is None:
        raise CronboardError("Missing required dependency: PyYAML. Install with: pip install -e .")


def require_croniter_dependency() -> None:
    if croniter is None:
        raise CronboardError("Missing required dependency: croniter. Install with: pip install -e .")


def system_timezone() -> Tuple[tzinfo, str]:
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            return ZoneInfo(tz_name), tz_name
        except (ZoneInfoNotFoundError, ValueError):
            pass
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    if local_tz is not None:
        return local_tz, local_tz.tzname(None) or "local"
    return UTC, "UTC"


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Job timezone by IANA name, falling back to the process-local zone."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug('Unknown timezone "%s"; using local time.', name)
    return system_timezone()[0]


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class CroniterEvaluator:
    """Five-field cron evaluation backed by croniter, in the schedule's own zone."""

    def next_fire_after(
        self,
        expression: str,
        timezone_name: Optional[str],
        cursor: datetime,
    ) -> Optional[datetime]:
        require_croniter_dependency()
        expr = expression.strip()
        if not expr.startswith("@") and len(expr.split()) != 5:
            logger.debug('Ignoring cron "%s": expected five fields.', expr)
            return None
        if timezone_name:
            try:
                tz: tzinfo = ZoneInfo(timezone_name)
            except (ZoneInfoNotFoundError, ValueError):
                logger.debug('Ignoring cron "%s": unknown timezone "%s".', expr, timezone_name)
                return None
        else:
            tz = system_timezone()[0]

        after_utc = _ensure_aware_utc(cursor)
        # Match on wall-clock time so a repeated local hour fires once.
        wall_cursor = after_utc.astimezone(tz).replace(tzinfo=None)
        try:
            iterator = croniter(expr, wall_cursor)
            for _ in range(MAX_EVALUATOR_SKIPS):
                wall = iterator.get_next(datetime).replace(tzinfo=None)
                for fold in (0, 1):
                    nxt_utc = wall.replace(tzinfo=tz, fold=fold).astimezone(UTC)
                    if nxt_utc > after_utc:
                        return nxt_utc
        except Exception as exc:
            logger.debug('Cannot evaluate cron "%s" (%s): %s', expr, timezone_name or "local", exc)
            return None
        return None


DEFAULT_EVALUATOR = CroniterEvaluator()


def cron_expression(job: CronJob) -> Optional[str]:
    schedule = job.schedule
    if isinstance(schedule, CronSchedule) and schedule.expression.strip():
        return schedule.expression.strip()
    return None


def date_key(instant: datetime, tz: tzinfo) -> str:
    return _ensure_aware_utc(instant).astimezone(tz).date().isoformat()


def day_heading(day: date) -> str:
    return f"{day:%a}, {day:%b} {day.day}"


def format_time(instant: datetime, tz: tzinfo) -> str:
    return _ensure_aware_utc(instant).astimezone(tz).strftime("%H:%M %Z").strip()


def local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=tz)


def start_of_week(now: datetime, week_starts_on: int, tz: tzinfo) -> datetime:
    """Local midnight of the most recent week_starts_on day (0=Sunday) at or before now."""
    local = _ensure_aware_utc(now).astimezone(tz)
    cron_weekday = (local.weekday() + 1) % 7
    diff = (cron_weekday - week_starts_on % 7) % 7
    return local_midnight(local.date() - timedelta(days=diff), tz)


def project_job(
    job: CronJob,
    start: datetime,
    end: datetime,
    evaluator: Optional[CronEvaluator] = None,
    limits: Optional[ProjectionLimits] = None,
) -> RunProjection:
    """Enumerate a job's fire times in [start, end), reduced by the capping policy.

    Evaluator failures end collection for that job; they never propagate.
    """
    schedule = job.schedule
    if not isinstance(schedule, CronSchedule) or not schedule.expression.strip():
        return RunProjection(runs=())
    expr = schedule.expression.strip()
    evaluator = evaluator or DEFAULT_EVALUATOR
    limits = limits or DEFAULT_LIMITS
    tz_name = schedule.timezone or None
    start = _ensure_aware_utc(start)
    end = _ensure_aware_utc(end)

    runs: List[datetime] = []
    cursor = start
    overshoot = False
    bound_hit = False
    for _ in range(limits.max_iterations_per_job):
        try:
            nxt = evaluator.next_fire_after(expr, tz_name, cursor)
        except Exception as exc:
            logger.debug('Evaluator failed for job "%s": %s', job.display_name, exc)
            nxt = None
        if nxt is None:
            break
        nxt = _ensure_aware_utc(nxt)
        if nxt >= end:
            break
        if nxt < start or (runs and nxt <= runs[-1]):
            cursor = max(cursor, nxt + CURSOR_STEP)
            continue
        runs.append(nxt)
        cursor = nxt + CURSOR_STEP
        if len(runs) > limits.overshoot_limit:
            overshoot = True
            break
    else:
        bound_hit = True
        logger.debug(
            'Iteration bound (%s) reached for job "%s" with %s run(s).',
            limits.max_iterations_per_job,
            job.display_name,
            len(runs),
        )

    return cap_runs(runs, tz_name, limits, overshoot=overshoot, iteration_bound_hit=bound_hit)


def cap_runs(
    runs: Sequence[datetime],
    timezone_name: Optional[str],
    limits: ProjectionLimits = DEFAULT_LIMITS,
    overshoot: bool = False,
    iteration_bound_hit: bool = False,
) -> RunProjection:
    if len(runs) <= limits.max_runs_per_job and not overshoot:
        return RunProjection(runs=tuple(runs), iteration_bound_hit=iteration_bound_hit)

    min_gap = min((later - earlier for earlier, later in zip(runs, runs[1:])), default=None)
    if min_gap is None or min_gap >= limits.noisy_interval:
        return RunProjection(
            runs=tuple(runs[: limits.max_runs_per_job]),
            was_capped=True,
            iteration_bound_hit=iteration_bound_hit,
        )

    # Noisy: first run of each calendar day in the job's zone.
    tz = resolve_timezone(timezone_name)
    capped: List[datetime] = []
    seen_days = set()
    for run_at in runs:
        key = date_key(run_at, tz)
        if key in seen_days:
            continue
        seen_days.add(key)
        capped.append(run_at)
        if len(capped) >= limits.max_runs_per_noisy_job:
            break
    return RunProjection(runs=tuple(capped), was_capped=True, iteration_bound_hit=iteration_bound_hit)


def _agenda_sort_key(item: AgendaItem) -> Tuple[datetime, str]:
    return item.run_at, item.job.name.casefold()


def build_agenda_items(
    jobs: Iterable[CronJob],
    start: datetime,
    end: datetime,
    evaluator: Optional[CronEvaluator] = None,
    limits: Optional[ProjectionLimits] = None,
) -> List[AgendaItem]:
    items: List[AgendaItem] = []
    for job in jobs:
        projection = project_job(job, start, end, evaluator=evaluator, limits=limits)
        for run_at in projection.runs:
            items.append(AgendaItem(run_at=run_at, job=job, was_capped=projection.was_capped))
    items.sort(key=_agenda_sort_key)
    return items


def group_by_day(items: Sequence[AgendaItem], tz: tzinfo) -> List[DayGroup]:
    grouped: Dict[str, List[AgendaItem]] = {}
    for item in items:
        grouped.setdefault(date_key(item.run_at, tz), []).append(item)
    return [
        DayGroup(key=key, heading=day_heading(date.fromisoformat(key)), items=tuple(members))
        for key, members in sorted(grouped.items())
    ]


def build_agenda(
    jobs: Iterable[CronJob],
    now: datetime,
    evaluator: Optional[CronEvaluator] = None,
    limits: Optional[ProjectionLimits] = None,
    display_tz: Optional[tzinfo] = None,
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
) -> AgendaView:
    limits = limits or DEFAULT_LIMITS
    tz = display_tz or system_timezone()[0]
    start = _ensure_aware_utc(now)
    end = start + timedelta(days=lookahead_days)

    items = build_agenda_items(jobs, start, end, evaluator=evaluator, limits=limits)
    total = len(items)
    shown = min(total, limits.max_items_total)
    return AgendaView(
        start=start,
        end=end,
        total=total,
        shown=shown,
        was_globally_capped=total > shown,
        groups=tuple(group_by_day(items[:shown], tz)),
    )


def build_week(
    jobs: Iterable[CronJob],
    now: datetime,
    week_starts_on: int = DEFAULT_WEEK_STARTS_ON,
    evaluator: Optional[CronEvaluator] = None,
    limits: Optional[ProjectionLimits] = None,
    display_tz: Optional[tzinfo] = None,
) -> WeekView:
    """Seven local-day slots for the week containing now; past instances are dropped."""
    limits = limits or DEFAULT_LIMITS
    tz = display_tz or system_timezone()[0]
    now_utc = _ensure_aware_utc(now)
    week_start = start_of_week(now_utc, week_starts_on, tz)
    days = [week_start.date() + timedelta(days=offset) for offset in range(7)]
    week_end = local_midnight(days[-1] + timedelta(days=1), tz)

    items = [
        item
        for item in build_agenda_items(jobs, week_start, week_end, evaluator=evaluator, limits=limits)
        if item.run_at >= now_utc
    ]
    total = len(items)
    shown = min(total, limits.max_items_total)

    by_day: Dict[str, List[AgendaItem]] = {}
    for item in items[:shown]:
        by_day.setdefault(date_key(item.run_at, tz), []).append(item)

    slots = []
    for day in days:
        key = day.isoformat()
        members = sorted(by_day.get(key, []), key=lambda item: item.run_at)
        slots.append(WeekDaySlot(key=key, day=day, heading=day_heading(day), items=tuple(members)))

    return WeekView(
        start=week_start.astimezone(UTC),
        end=week_end.astimezone(UTC),
        total=total,
        shown=shown,
        was_globally_capped=total > shown,
        days=tuple(slots),
    )


def find_list(payload: Any, keys: Sequence[str]) -> Optional[List[Any]]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return None
    for key in keys:
        candidate = payload.get(key)
        if isinstance(candidate, list):
            return candidate
    return None


def extract_list(payload: Any, keys: Sequence[str]) -> List[Any]:
    return find_list(payload, keys) or []


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def parse_schedule(raw: Any) -> Schedule:
    if isinstance(raw, str):
        return OtherSchedule(kind=_optional_str(raw))
    if not isinstance(raw, dict):
        return OtherSchedule()
    kind = _optional_str(raw.get("kind"))
    if kind != "cron":
        return OtherSchedule(kind=kind)
    expression = _optional_str(raw.get("expr")) or _optional_str(raw.get("cron")) or ""
    tz_name = _optional_str(raw.get("tz")) or _optional_str(raw.get("timezone"))
    return CronSchedule(expression=expression, timezone=tz_name)


def parse_job(raw: Dict[str, Any]) -> CronJob:
    state_raw = raw.get("state")
    state_raw = state_raw if isinstance(state_raw, dict) else {}
    payload_raw = raw.get("payload")
    payload_raw = payload_raw if isinstance(payload_raw, dict) else {}
    return CronJob(
        id=_optional_str(raw.get("id")) or "",
        name=_optional_str(raw.get("name")) or "",
        agent_id=_optional_str(raw.get("agentId")),
        enabled=bool(raw.get("enabled")),
        schedule=parse_schedule(raw.get("schedule")),
        state=JobStatus(
            next_run_at_ms=_optional_int(state_raw.get("nextRunAtMs")),
            last_run_at_ms=_optional_int(state_raw.get("lastRunAtMs")),
            last_status=_optional_str(state_raw.get("lastRunStatus")) or _optional_str(state_raw.get("lastStatus")),
        ),
        thinking=_optional_str(payload_raw.get("thinking")) or _optional_str(raw.get("thinking")),
    )


def parse_jobs(raw_jobs: Iterable[Any]) -> List[CronJob]:
    jobs: List[CronJob] = []
    for idx, raw in enumerate(raw_jobs):
        if not isinstance(raw, dict):
            logger.debug("Skipping job entry %s: not a mapping.", idx)
            continue
        jobs.append(parse_job(raw))
    return jobs


def filter_jobs(jobs: Iterable[CronJob], query: Optional[str] = None, enabled_only: bool = False) -> List[CronJob]:
    needle = (query or "").strip().lower()
    selected: List[CronJob] = []
    for job in jobs:
        if needle and needle not in job.name.lower() and needle not in (job.agent_id or "").lower():
            continue
        if enabled_only and not job.enabled:
            continue
        selected.append(job)
    return selected


def format_schedule(schedule: Schedule) -> str:
    if isinstance(schedule, CronSchedule):
        text = f"cron {schedule.expression}"
        if schedule.timezone:
            text += f" @ {schedule.timezone}"
        return text.strip()
    return schedule.kind or PLACEHOLDER


def pick_agent_model(agent: Any) -> str:
    if not isinstance(agent, dict):
        return ""
    defaults = agent.get("defaults")
    defaults = defaults if isinstance(defaults, dict) else {}
    default_model = defaults.get("model")
    agent_defaults = agent.get("agentDefaults")
    agent_defaults = agent_defaults if isinstance(agent_defaults, dict) else {}
    candidates = [
        agent.get("model"),
        agent.get("primaryModel"),
        default_model if isinstance(default_model, str) else None,
        default_model.get("primary") if isinstance(default_model, dict) else None,
        agent_defaults.get("model"),
    ]
    for candidate in candidates:
        text = _optional_str(candidate)
        if text:
            return text
    return ""


def build_model_lookup(payload: Any) -> Dict[str, str]:
    """Agent id to model name, with the fleet default under "(default)"."""
    lookup: Dict[str, str] = {}
    default_model = ""
    for agent in extract_list(payload, AGENT_LIST_KEYS):
        if not isinstance(agent, dict) or not agent.get("id"):
            continue
        model = pick_agent_model(agent)
        lookup[str(agent["id"])] = model or PLACEHOLDER
        if agent.get("isDefault") and model and not default_model:
            default_model = model

    if isinstance(payload, dict):
        default_model = pick_agent_model(
            {"defaults": payload.get("defaults"), "agentDefaults": payload.get("agentDefaults")}
        ) or default_model
    if default_model:
        lookup[DEFAULT_AGENT_ID] = default_model
    return lookup


def model_for_agent(lookup: Dict[str, str], agent_id: str) -> str:
    return lookup.get(agent_id) or lookup.get(DEFAULT_AGENT_ID) or PLACEHOLDER


def format_epoch_ms(epoch_ms: Optional[int], tz: tzinfo) -> str:
    if not epoch_ms:
        return PLACEHOLDER
    moment = datetime.fromtimestamp(epoch_ms / 1000.0, tz=UTC).astimezone(tz)
    return moment.strftime("%Y-%m-%d %H:%M %Z").strip()


def format_generated_at(raw: Any, tz: Optional[tzinfo] = None) -> str:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return "No data found. Run: cronboard refresh"
    if not math.isfinite(raw) or raw <= 0:
        return "No data found. Run: cronboard refresh"
    epoch_ms = raw if raw > 1_000_000_000_000 else raw * 1000
    return format_epoch_ms(int(epoch_ms), tz or system_timezone()[0])


def read_json_file(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise DataError(f"Error: Failed to parse JSON in {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise DataError(f"Error: {path} is not valid UTF-8: {exc}") from exc
    except OSError as exc:
        raise DataError(f"Error: Failed to read {path}: {exc}") from exc


def load_snapshot(data_dir: Path, tz: Optional[tzinfo] = None) -> Snapshot:
    jobs_path = data_dir / JOBS_FILE
    if not jobs_path.exists():
        raise DataError(f"Error: No job data at {jobs_path}. Run: cronboard refresh")
    jobs = parse_jobs(extract_list(read_json_file(jobs_path), JOB_LIST_KEYS))

    model_by_agent: Dict[str, str] = {}
    agents_path = data_dir / AGENTS_FILE
    if agents_path.exists():
        try:
            model_by_agent = build_model_lookup(read_json_file(agents_path))
        except DataError as exc:
            logger.warning("Ignoring agent data: %s", exc)

    generated_raw: Any = None
    meta_path = data_dir / META_FILE
    if meta_path.exists():
        try:
            meta = read_json_file(meta_path)
            generated_raw = meta.get("generatedAt") if isinstance(meta, dict) else None
        except DataError as exc:
            logger.warning("Ignoring snapshot metadata: %s", exc)

    return Snapshot(
        jobs=jobs,
        model_by_agent=model_by_agent,
        generated_at=format_generated_at(generated_raw, tz),
    )


def run_listing_command(command: List[str], timeout: int, label: str) -> str:
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise RefreshError(f"Could not run {label}: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise RefreshError(f"{label} timed out after {timeout} seconds.") from exc

    if result.returncode != 0:
        details = (result.stderr or "").strip() or (result.stdout or "").strip() or "No output."
        raise RefreshError(f"{label} exited with code {result.returncode}: {details}")
    return (result.stdout or "").strip()


def parse_json_output(label: str, raw: str) -> Any:
    """Parse CLI JSON output, tolerating banner text printed before the document."""
    text = raw.strip()
    if not text:
        raise RefreshError(f"{label} returned empty output.")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        starts = [idx for idx in (text.find("{"), text.find("[")) if idx >= 0]
        start = min(starts) if starts else -1
        if start > 0:
            try:
                return json.loads(text[start:])
            except json.JSONDecodeError:
                pass
        preview = " ".join(text.split())[:220]
        raise RefreshError(f"Failed to parse JSON from {label}: {exc}. Output preview: {preview}") from exc


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote: %s", path)


def refresh_snapshot(settings: Settings, now: Optional[datetime] = None) -> List[Path]:
    """Rebuild the data directory from the read-only listing commands."""
    refresh = settings.refresh
    jobs_label = " ".join(refresh.jobs_command)
    agents_label = " ".join(refresh.agents_command)

    jobs_payload = parse_json_output(jobs_label, run_listing_command(refresh.jobs_command, refresh.timeout, jobs_label))
    if find_list(jobs_payload, JOB_LIST_KEYS) is None:
        raise RefreshError(f"Parsed {jobs_label} JSON but could not find an array ({', '.join(JOB_LIST_KEYS)}).")
    agents_payload = parse_json_output(
        agents_label, run_listing_command(refresh.agents_command, refresh.timeout, agents_label)
    )
    if find_list(agents_payload, AGENT_LIST_KEYS) is None:
        raise RefreshError(
            f"Parsed {agents_label} JSON but could not find an array ({', '.join(AGENT_LIST_KEYS)})."
        )

    data_dir = settings.data_dir
    data_dir.mkdir(parents=True, exist_ok=True)
    generated = _ensure_aware_utc(now or datetime.now(tz=UTC))
    written = [data_dir / JOBS_FILE, data_dir / AGENTS_FILE, data_dir / META_FILE]
    _write_json(written[0], jobs_payload)
    _write_json(written[1], agents_payload)
    _write_json(written[2], {"generatedAt": int(generated.timestamp())})
    return written


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: Iterable[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - set(allowed)
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def normalize_weekday_token(token: str, field_path: str) -> int:
    tok = token.strip().lower()
    if tok in DAY_NAME_TO_CRON:
        return DAY_NAME_TO_CRON[tok]
    if tok.isdigit():
        num = int(tok)
        if num == 7:
            return 0
        if 0 <= num <= 6:
            return num
    raise ConfigError(f'Error: Invalid weekday "{token}" at {field_path}.')


def parse_week_start(value: Any, field_path: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"Error: {field_path} must be a weekday name or number 0-7.")
    return normalize_weekday_token(str(value), field_path)


def parse_command(value: Any, field_path: str, default: List[str]) -> List[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        try:
            command = shlex.split(value)
        except ValueError as exc:
            raise ConfigError(f"Error: {field_path} is not a valid command line: {exc}") from exc
    elif isinstance(value, list) and all(isinstance(part, str) for part in value):
        command = list(value)
    else:
        raise ConfigError(f"Error: {field_path} must be a string or list of strings.")
    if not command:
        raise ConfigError(f"Error: {field_path} must not be empty.")
    return command


def parse_limits(raw: Any, field_path: str = "projection") -> ProjectionLimits:
    section = ensure_mapping(
        raw,
        field_path,
        {
            "max_runs_per_job",
            "max_runs_per_noisy_job",
            "max_iterations_per_job",
            "max_items_total",
            "overshoot_multiplier",
            "noisy_interval_minutes",
        },
    )
    noisy_minutes = ensure_int(
        section.get("noisy_interval_minutes"),
        f"{field_path}.noisy_interval_minutes",
        NOISY_INTERVAL_MINUTES,
        0,
    )
    return ProjectionLimits(
        max_runs_per_job=ensure_int(section.get("max_runs_per_job"), f"{field_path}.max_runs_per_job", MAX_RUNS_PER_JOB),
        max_runs_per_noisy_job=ensure_int(
            section.get("max_runs_per_noisy_job"),
            f"{field_path}.max_runs_per_noisy_job",
            MAX_RUNS_PER_NOISY_JOB,
        ),
        max_iterations_per_job=ensure_int(
            section.get("max_iterations_per_job"),
            f"{field_path}.max_iterations_per_job",
            MAX_ITERATIONS_PER_JOB,
        ),
        max_items_total=ensure_int(section.get("max_items_total"), f"{field_path}.max_items_total", MAX_AGENDA_ITEMS_TOTAL),
        overshoot_multiplier=ensure_int(
            section.get("overshoot_multiplier"),
            f"{field_path}.overshoot_multiplier",
            OVERSHOOT_MULTIPLIER,
        ),
        noisy_interval=timedelta(minutes=noisy_minutes),
    )


def parse_display(raw: Any, field_path: str = "display") -> DisplaySettings:
    section = ensure_mapping(raw, field_path, {"timezone", "week_starts_on", "lookahead_days"})
    if section.get("timezone") is None:
        tz, tz_name = system_timezone()
    else:
        tz_name = ensure_str(section.get("timezone"), f"{field_path}.timezone")
        tz = parse_timezone(tz_name, f"{field_path}.timezone")
    return DisplaySettings(
        timezone=tz,
        timezone_name=tz_name,
        week_starts_on=parse_week_start(section.get("week_starts_on"), f"{field_path}.week_starts_on", DEFAULT_WEEK_STARTS_ON),
        lookahead_days=ensure_int(section.get("lookahead_days"), f"{field_path}.lookahead_days", DEFAULT_LOOKAHEAD_DAYS),
    )


def parse_refresh(raw: Any, field_path: str = "refresh") -> RefreshSettings:
    section = ensure_mapping(raw, field_path, {"jobs_command", "agents_command", "timeout"})
    return RefreshSettings(
        jobs_command=parse_command(section.get("jobs_command"), f"{field_path}.jobs_command", DEFAULT_JOBS_COMMAND),
        agents_command=parse_command(
            section.get("agents_command"), f"{field_path}.agents_command", DEFAULT_AGENTS_COMMAND
        ),
        timeout=ensure_int(section.get("timeout"), f"{field_path}.timeout", DEFAULT_REFRESH_TIMEOUT_SECONDS),
    )


def _resolve_data_dir(value: Any, config_dir: Path, field_path: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty path string.")
    raw = Path(value.strip()).expanduser()
    resolved = raw if raw.is_absolute() else (config_dir / raw)
    return resolved.resolve()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_settings(payload: Dict[str, Any], config_dir: Path) -> Settings:
    unknown_top = set(payload.keys()) - {"version", "data_dir", "display", "projection", "refresh"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")
    version = payload.get("version", 1)
    if version != 1:
        raise ConfigError(f'Error: Unsupported config version "{version}".')

    return Settings(
        data_dir=_resolve_data_dir(payload.get("data_dir", DEFAULT_DATA_DIR), config_dir, "data_dir"),
        display=parse_display(payload.get("display")),
        limits=parse_limits(payload.get("projection")),
        refresh=parse_refresh(payload.get("refresh")),
    )


def load_settings(config_path: Path, required: bool = False) -> Settings:
    """Read settings from YAML; an absent default config means built-in defaults."""
    if not config_path.exists() and not required:
        return parse_settings({}, config_path.parent)
    return parse_settings(_load_config_payload(config_path), config_path.parent)


def parse_now(value: Optional[str], tz: tzinfo) -> datetime:
    if value is None:
        return datetime.now(tz=UTC)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise CronboardError(f'--now must be an ISO datetime, got "{value}".') from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(UTC)


def clip_and_pad(value: Any, width: int) -> str:
    text = str(value if value is not None else PLACEHOLDER)
    if len(text) > width:
        if width <= 3:
            return text[:width]
        return text[: width - 3] + "..."
    return text.ljust(width)


def render_table(rows: List[Dict[str, str]], columns: List[Tuple[str, str, int]]) -> List[str]:
    widths = {}
    for key, title, maximum in columns:
        longest = max([len(title)] + [len(str(row.get(key, PLACEHOLDER))) for row in rows])
        widths[key] = min(maximum, longest)
    lines = [
        " | ".join(clip_and_pad(title, widths[key]) for key, title, _ in columns).rstrip(),
        "-+-".join("-" * widths[key] for key, _, _ in columns),
    ]
    for row in rows:
        lines.append(" | ".join(clip_and_pad(row.get(key), widths[key]) for key, _, _ in columns).rstrip())
    return lines


def _item_lines(item: AgendaItem, model_by_agent: Dict[str, str], tz: tzinfo) -> List[str]:
    flags = [
        "enabled" if item.job.enabled else "disabled",
        item.job.status,
    ]
    if item.was_capped:
        flags.append("capped")
    time_text = format_time(item.run_at, tz)
    if item.schedule_tz:
        time_text += f" ({format_time(item.run_at, resolve_timezone(item.schedule_tz))} {item.schedule_tz})"
    model = model_for_agent(model_by_agent, item.job.agent_label)
    return [
        f"  {time_text}  {item.job.display_name} [{', '.join(flags)}]",
        f"      agent: {item.job.agent_label} | model: {model} | {format_schedule(item.job.schedule)}",
    ]


def _cap_notice(total: int, shown: int, capped: bool) -> str:
    if not capped:
        return ""
    return f" Showing {shown} of {total} total instances."


def _select_jobs(settings: Settings, query: Optional[str], enabled_only: bool) -> Snapshot:
    snapshot = load_snapshot(settings.data_dir, settings.display.timezone)
    return Snapshot(
        jobs=filter_jobs(snapshot.jobs, query=query, enabled_only=enabled_only),
        model_by_agent=snapshot.model_by_agent,
        generated_at=snapshot.generated_at,
    )


def command_jobs(settings: Settings, query: Optional[str], enabled_only: bool) -> int:
    snapshot = _select_jobs(settings, query, enabled_only)
    tz = settings.display.timezone
    print(f"Generated: {snapshot.generated_at}")
    if not snapshot.jobs:
        print("No jobs match filter.")
        return 0
    rows = []
    for job in sorted(snapshot.jobs, key=lambda item: item.display_name.casefold()):
        rows.append(
            {
                "name": job.display_name,
                "agent": job.agent_label,
                "model": model_for_agent(snapshot.model_by_agent, job.agent_label),
                "thinking": job.thinking or PLACEHOLDER,
                "enabled": "enabled" if job.enabled else "disabled",
                "schedule": format_schedule(job.schedule),
                "next": format_epoch_ms(job.state.next_run_at_ms, tz),
                "last": format_epoch_ms(job.state.last_run_at_ms, tz),
                "status": job.status,
            }
        )
    columns = [
        ("name", "job name", 42),
        ("agent", "agent", 24),
        ("model", "model", 30),
        ("thinking", "thinking", 8),
        ("enabled", "enabled", 8),
        ("schedule", "schedule", 36),
        ("next", "next", 22),
        ("last", "last", 22),
        ("status", "last status", 12),
    ]
    for line in render_table(rows, columns):
        print(line)
    return 0


def command_agenda(
    settings: Settings,
    query: Optional[str],
    enabled_only: bool,
    now: datetime,
    as_json: bool,
) -> int:
    snapshot = _select_jobs(settings, query, enabled_only)
    display = settings.display
    agenda = build_agenda(
        snapshot.jobs,
        now,
        limits=settings.limits,
        display_tz=display.timezone,
        lookahead_days=display.lookahead_days,
    )
    if as_json:
        print(json.dumps(agenda.to_payload(), indent=2))
        return 0

    print(
        f"Upcoming run instances for the next {display.lookahead_days} day(s) ({display.timezone_name}). "
        "Noisy schedules are capped to one run/day."
        + _cap_notice(agenda.total, agenda.shown, agenda.was_globally_capped)
    )
    if not agenda.groups:
        print("No upcoming runs found (or no cron expressions in current filter).")
        return 0
    for group in agenda.groups:
        print("")
        print(group.heading)
        for item in group.items:
            for line in _item_lines(item, snapshot.model_by_agent, display.timezone):
                print(line)
    return 0


def command_week(
    settings: Settings,
    query: Optional[str],
    enabled_only: bool,
    now: datetime,
    week_starts_on: int,
    as_json: bool,
) -> int:
    snapshot = _select_jobs(settings, query, enabled_only)
    display = settings.display
    week = build_week(
        snapshot.jobs,
        now,
        week_starts_on=week_starts_on,
        limits=settings.limits,
        display_tz=display.timezone,
    )
    if as_json:
        print(json.dumps(week.to_payload(), indent=2))
        return 0

    print(
        f"Week view ({week.label}, {display.timezone_name}, starts {CRON_TO_DAY_NAME[week_starts_on]}). "
        "Upcoming run instances only. "
        "Noisy schedules are capped to one run/day."
        + _cap_notice(week.total, week.shown, week.was_globally_capped)
    )
    for slot in week.days:
        print("")
        print(f"{slot.heading} ({len(slot.items)})")
        if not slot.items:
            print(f"  {PLACEHOLDER}")
            continue
        for item in slot.items:
            for line in _item_lines(item, snapshot.model_by_agent, display.timezone):
                print(line)
    return 0


def command_runs(settings: Settings, job_name: str, now: datetime, days: int) -> int:
    snapshot = load_snapshot(settings.data_dir, settings.display.timezone)
    matches = [job for job in snapshot.jobs if job_name in {job.name, job.id}]
    if not matches:
        raise CronboardError(f'Unknown job "{job_name}".')

    tz = settings.display.timezone
    start = _ensure_aware_utc(now)
    end = start + timedelta(days=days)
    for job in matches:
        projection = project_job(job, start, end, limits=settings.limits)
        print("=" * 80)
        print(f"Job: {job.display_name} (id={job.id or PLACEHOLDER}, enabled={job.enabled})")
        print(f"Schedule: {format_schedule(job.schedule)}")
        print(f"Window: {start.astimezone(tz).isoformat()} -> {end.astimezone(tz).isoformat()}")
        print(f"Capped: {projection.was_capped}")
        if projection.iteration_bound_hit:
            print(f"Iteration bound reached ({settings.limits.max_iterations_per_job} evaluations).")
        print(f"Run(s): {len(projection.runs)}")
        if not projection.runs:
            print("- none")
        for run_at in projection.runs:
            print(f"- {run_at.astimezone(tz).isoformat()}")
    print("=" * 80)
    return 0


def command_refresh(settings: Settings) -> int:
    written = refresh_snapshot(settings)
    logger.info("Refreshed %s file(s) in %s.", len(written), settings.data_dir)
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="cronboard: agenda and week views of upcoming cron job runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to cronboard YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_filters(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
        sub.add_argument("--query", help="Filter by job name or agent id (substring)")
        sub.add_argument("--enabled-only", action="store_true", help="Only include enabled jobs")

    jobs_parser = subparsers.add_parser("jobs", help="List jobs as a table")
    add_filters(jobs_parser)

    agenda_parser = subparsers.add_parser("agenda", help="Show upcoming runs grouped by day")
    add_filters(agenda_parser)
    agenda_parser.add_argument("--now", help="Reference time (ISO 8601, default: current time)")
    agenda_parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")

    week_parser = subparsers.add_parser("week", help="Show the current week as seven day slots")
    add_filters(week_parser)
    week_parser.add_argument("--now", help="Reference time (ISO 8601, default: current time)")
    week_parser.add_argument("--week-starts-on", help="Weekday name or number (0/7 = Sunday)")
    week_parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")

    runs_parser = subparsers.add_parser("runs", help="Project the runs of a single job")
    runs_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    runs_parser.add_argument("--job", required=True, help="Job name or id")
    runs_parser.add_argument("--now", help="Reference time (ISO 8601, default: current time)")
    runs_parser.add_argument(
        "--days",
        type=int,
        default=DEFAULT_LOOKAHEAD_DAYS,
        help=f"Window length in days (default: {DEFAULT_LOOKAHEAD_DAYS})",
    )

    refresh_parser = subparsers.add_parser("refresh", help="Rebuild the job snapshot from the automation CLI")
    refresh_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        settings = load_settings(config_path, required=args.config is not None)
        tz = settings.display.timezone
        if args.command == "jobs":
            return command_jobs(settings, query=args.query, enabled_only=args.enabled_only)
        if args.command == "agenda":
            return command_agenda(
                settings,
                query=args.query,
                enabled_only=args.enabled_only,
                now=parse_now(args.now, tz),
                as_json=args.json,
            )
        if args.command == "week":
            week_starts_on = settings.display.week_starts_on
            if args.week_starts_on is not None:
                week_starts_on = normalize_weekday_token(args.week_starts_on, "--week-starts-on")
            return command_week(
                settings,
                query=args.query,
                enabled_only=args.enabled_only,
                now=parse_now(args.now, tz),
                week_starts_on=week_starts_on,
                as_json=args.json,
            )
        if args.command == "runs":
            if args.days <= 0:
                raise CronboardError("--days must be >= 1")
            return command_runs(settings, job_name=args.job, now=parse_now(args.now, tz), days=args.days)
        if args.command == "refresh":
            return command_refresh(settings)
        raise CronboardError(f"Unsupported command: {args.command}")
    except CronboardError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
