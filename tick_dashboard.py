#!/usr/bin/env python3
# tick_dashboard: TickTick / Dida365 task analytics in the terminal
#
# Hotkeys
#   1-5  switch period (day / week / month / quarter / year)
#   h/l  previous / next period (arrow keys work too)
#   t    jump back to today
#   p/P  move project focus forward / toggle the focused project or folder
#   g/G  move tag focus forward / toggle the focused tag
#   a    clear project and tag selections
#   j/k  scroll the task table
#   u    refresh tasks from the Open API (needs a stored token)
#   q    quit
#
# Config highlights (YAML, every key optional)
#   timezone: "Asia/Shanghai"
#   period: week
#   api:
#     client_id: ...
#     client_secret: ...
#   folders:        {"Reading": "Self-improvement"}
#   project_colors: {"Reading": "#db2777"}
#   folder_colors:  {"Self-improvement": "#7c3aed"}
#
# Environment
# - TICK_CLIENT_ID / TICK_CLIENT_SECRET (or a .env file) for the OAuth app

from __future__ import annotations

import argparse
import asyncio
import calendar
import datetime as dt
import json
import math
import os
import re
import sqlite3
import sys
import time
import unicodedata
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple
from urllib.parse import urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth as _pt_get_cwidth
from prompt_toolkit.widgets import Frame
import logging
from logging.handlers import RotatingFileHandler


# -----------------------------
# Errors
# -----------------------------
class TickDashboardError(Exception):
    """Base class for every error raised by tick_dashboard."""


class MalformedInputError(TickDashboardError):
    """The CSV export cannot be parsed; the import is abandoned."""


class MissingHeaderError(MalformedInputError):
    pass


class UnrecognizedFieldError(TickDashboardError):
    """Unknown priority/status code. Mappers default the value instead of failing."""

    def __init__(self, field_name: str, value: object):
        super().__init__(f"Unrecognized {field_name} code: {value!r}")
        self.field_name = field_name
        self.value = value


class UpstreamUnavailableError(TickDashboardError):
    pass


class AuthRequiredError(TickDashboardError):
    """No usable access token; the caller has to run the OAuth login again."""


class MissingReferenceDateWarning(UserWarning):
    def __init__(self, title: str, start: Optional[str], due: Optional[str], completed: Optional[str]):
        super().__init__(
            f"All date fields invalid, task will never show in a time range: {title!r} "
            f"(Start Date={start!r}, Due Date={due!r}, Completed Time={completed!r})"
        )
        self.title = title


# -----------------------------
# Config models
# -----------------------------
DEFAULT_FOLDERS: Dict[str, str] = {
    "Literature": "Research",
    "Experiments": "Research",
    "Research goals": "Research",
    "Work": "Work affairs",
    "Tutoring": "Work affairs",
    "Growth": "Self-improvement",
    "Reading": "Self-improvement",
    # Health, Leisure and Emergencies are independent lists.
}

DEFAULT_PROJECT_COLORS: Dict[str, str] = {
    "Literature": "#22c55e",
    "Experiments": "#EA3F4A",
    "Research goals": "#ec4899",
    "Work": "#3b82f6",
    "Tutoring": "#f97316",
    "Emergencies": "#f59e0b",
    "Leisure": "#848BAD",
    "Growth": "#06b6d4",
    "Reading": "#db2777",
    "Health": "#eab308",
}

# Darker than their member lists so the folder ring stands apart.
DEFAULT_FOLDER_COLORS: Dict[str, str] = {
    "Research": "#dc2626",
    "Work affairs": "#1d4ed8",
    "Self-improvement": "#7c3aed",
}

NEUTRAL_COLOR = "#9ca3af"
API_DEFAULT_COLOR = "#4f7cff"


@dataclass
class ApiSettings:
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:3000/callback"
    authorize_url: str = "https://dida365.com/oauth/authorize"
    token_url: str = "https://dida365.com/oauth/token"
    base_url: str = "https://api.dida365.com/open/v1"
    scope: str = "tasks:read tasks:write"
    timeout: float = 20.0


@dataclass
class Config:
    timezone: Optional[str] = None
    period: str = "day"
    api: ApiSettings = field(default_factory=ApiSettings)
    folders: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FOLDERS))
    project_colors: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PROJECT_COLORS))
    folder_colors: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FOLDER_COLORS))

    def tzinfo(self) -> Optional[dt.tzinfo]:
        if not self.timezone:
            return None
        return ZoneInfo(self.timezone)

    def resolver(self) -> "CategoryResolver":
        return CategoryResolver(self.folders, self.project_colors, self.folder_colors)


def _string_table(raw: dict, key: str, default: Dict[str, str]) -> Dict[str, str]:
    value = raw.get(key)
    if value is None:
        return dict(default)
    if not isinstance(value, dict):
        raise ValueError(f"Config: '{key}' must be a mapping of name -> value.")
    return {str(k): str(v) for k, v in value.items()}


def default_config() -> Config:
    return Config()


def load_config(path: Optional[str]) -> Config:
    """Read the YAML config; a missing path yields the built-in defaults."""
    if not path:
        cfg = default_config()
    else:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config: top level must be a mapping.")
        period = str(raw.get("period") or "day").lower()
        if period not in PERIODS:
            raise ValueError(f"Config: 'period' must be one of {', '.join(PERIODS)}.")
        tz_name = raw.get("timezone") or None
        if tz_name:
            try:
                ZoneInfo(str(tz_name))
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"Config: unknown 'timezone' {tz_name!r}.") from exc
        api_raw = raw.get("api") or {}
        if not isinstance(api_raw, dict):
            raise ValueError("Config: 'api' must be a mapping.")
        known = set(ApiSettings.__dataclass_fields__)
        unknown = sorted(set(api_raw) - known)
        if unknown:
            raise ValueError(f"Config: unknown 'api' keys: {', '.join(unknown)}")
        api = ApiSettings(**api_raw)
        api.timeout = float(api.timeout)
        cfg = Config(
            timezone=str(tz_name) if tz_name else None,
            period=period,
            api=api,
            folders=_string_table(raw, "folders", DEFAULT_FOLDERS),
            project_colors=_string_table(raw, "project_colors", DEFAULT_PROJECT_COLORS),
            folder_colors=_string_table(raw, "folder_colors", DEFAULT_FOLDER_COLORS),
        )
    cfg.api.client_id = os.environ.get("TICK_CLIENT_ID") or cfg.api.client_id
    cfg.api.client_secret = os.environ.get("TICK_CLIENT_SECRET") or cfg.api.client_secret
    return cfg


def load_dotenv_secrets(api: ApiSettings) -> None:
    """Fill missing client credentials from a .env file (current dir or script dir)."""
    if api.client_id and api.client_secret:
        return
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue
                k, v = line.split('=', 1)
                k = k.strip()
                v = v.strip().strip('"').strip("'")
                if k == "TICK_CLIENT_ID" and v and not api.client_id:
                    api.client_id = v
                elif k == "TICK_CLIENT_SECRET" and v and not api.client_secret:
                    api.client_secret = v
        return


# -----------------------------
# Task model
# -----------------------------
PRIORITY_CODES: Dict[str, int] = {"0": 0, "1": 1, "3": 3, "5": 5}
PRIORITY_LABELS: Dict[int, str] = {0: "none", 1: "low", 3: "medium", 5: "high"}
STATUS_OPEN = 0
STATUS_COMPLETED = 2
# Exports disagree on whether "completed" is 1 or 2.
STATUS_CODES: Dict[str, int] = {"0": STATUS_OPEN, "1": STATUS_COMPLETED, "2": STATUS_COMPLETED}


@dataclass
class Task:
    id: str
    title: str
    project_name: str
    folder_name: str = ""
    tags: List[str] = field(default_factory=list)
    start_date: Optional[dt.datetime] = None
    due_date: Optional[dt.datetime] = None
    completed_time: Optional[dt.datetime] = None
    is_all_day: bool = False
    priority: int = 0
    status: int = STATUS_OPEN
    source: str = "csv"
    project_color: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    @property
    def priority_label(self) -> str:
        return PRIORITY_LABELS.get(self.priority, "none")

    def to_dict(self) -> Dict[str, object]:
        def _iso(d: Optional[dt.datetime]) -> Optional[str]:
            return d.isoformat(timespec="seconds") if d else None
        return {
            "id": self.id,
            "title": self.title,
            "projectName": self.project_name,
            "folderName": self.folder_name,
            "tags": list(self.tags),
            "startDate": _iso(self.start_date),
            "dueDate": _iso(self.due_date),
            "completedTime": _iso(self.completed_time),
            "isAllDay": self.is_all_day,
            "priority": self.priority,
            "status": self.status,
            "source": self.source,
        }


_TZ_BASIC_OFFSET_RE = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_timestamp(value: Optional[str], tz: Optional[dt.tzinfo] = None) -> Optional[dt.datetime]:
    """Parse an export/API timestamp into a naive local datetime.

    Spreadsheet error values (#REF!, #NAME?, ...), "N" and anything that is not
    an ISO-8601 date come back as None. Offset-aware values are converted to
    ``tz`` (system local time when None).
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s or s.startswith('#') or s == 'N' or len(s) < 8:
        return None
    if s.endswith('Z'):
        s = s[:-1] + '+00:00'
    # TickTick writes offsets as +0000
    if 'T' in s or ' ' in s:
        s = _TZ_BASIC_OFFSET_RE.sub(r"\1:\2", s)
    try:
        parsed = dt.datetime.fromisoformat(s)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz).replace(tzinfo=None)
    return parsed


def _lookup_code(table: Dict[str, int], raw: object, field_name: str) -> int:
    key = str(raw).strip() if raw is not None else ""
    if key not in table:
        raise UnrecognizedFieldError(field_name, raw)
    return table[key]


def _normalize_priority(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    try:
        return _lookup_code(PRIORITY_CODES, raw, "priority")
    except UnrecognizedFieldError as exc:
        logging.getLogger('tick_dashboard').debug("%s; using none", exc)
        return 0


def _normalize_status(raw: object, has_completion: bool) -> int:
    # A completion timestamp wins over an explicit open status.
    if has_completion:
        return STATUS_COMPLETED
    if raw is None or raw == "":
        return STATUS_OPEN
    try:
        return _lookup_code(STATUS_CODES, raw, "status")
    except UnrecognizedFieldError as exc:
        logging.getLogger('tick_dashboard').debug("%s; treating as open", exc)
        return STATUS_OPEN


def _split_tags(raw: object) -> List[str]:
    if isinstance(raw, (list, tuple)):
        parts = [str(t) for t in raw]
    elif raw:
        parts = re.split(r"[,，]", str(raw))
    else:
        return []
    return [t.strip() for t in parts if t and t.strip()]


def _truthy_flag(raw: object) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in ("true", "1")


# -----------------------------
# Colors & folders
# -----------------------------
_EMOJI_EXTRA = {"\u200d", "\ufe0e", "\ufe0f", "\u20e3"}


def _is_emoji_char(ch: str) -> bool:
    if ch.isspace() or ch in _EMOJI_EXTRA:
        return True
    cp = ord(ch)
    if 0x1F000 <= cp <= 0x1FAFF or 0x2600 <= cp <= 0x27BF or 0xE0020 <= cp <= 0xE007F:
        return True
    if 0x20D0 <= cp <= 0x20FF:
        return True
    return unicodedata.category(ch) in ("So", "Me")


def strip_emoji(name: Optional[str]) -> str:
    """Drop leading emoji / pictograph / variation-selector clusters and spaces."""
    if not name:
        return ""
    idx = 0
    while idx < len(name) and _is_emoji_char(name[idx]):
        idx += 1
    return name[idx:].strip()


class CategoryResolver:
    """Static list -> folder and color tables, tolerant of emoji-prefixed names."""

    def __init__(self, folders: Optional[Dict[str, str]] = None,
                 project_colors: Optional[Dict[str, str]] = None,
                 folder_colors: Optional[Dict[str, str]] = None):
        self.folders = dict(DEFAULT_FOLDERS if folders is None else folders)
        self.project_colors = dict(DEFAULT_PROJECT_COLORS if project_colors is None else project_colors)
        self.folder_colors = dict(DEFAULT_FOLDER_COLORS if folder_colors is None else folder_colors)

    @staticmethod
    def _lookup(table: Dict[str, str], name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        return table.get(name) or table.get(strip_emoji(name))

    def resolve_folder(self, project_name: str) -> str:
        return self._lookup(self.folders, project_name) or project_name

    def resolve_project_color(self, name: str, fallback: Optional[str] = None) -> str:
        """Configured color first, then the source's own list color, then neutral."""
        return self._lookup(self.project_colors, name) or fallback or NEUTRAL_COLOR

    def resolve_folder_color(self, name: str) -> str:
        return self._lookup(self.folder_colors, name) or self.resolve_project_color(name)

    def is_independent(self, project_name: str) -> bool:
        """True when a list is its own folder (no multi-member grouping)."""
        return strip_emoji(project_name) == strip_emoji(self.resolve_folder(project_name))


def resolve_api_color(value: object) -> str:
    """Normalise an Open API list color (#hex or decimal int) to CSS hex."""
    if value is None or value == "":
        return API_DEFAULT_COLOR
    text = str(value).strip()
    if text.startswith('#'):
        return text
    if isinstance(value, int) or text.isdigit():
        return '#' + format(int(text), 'x').rjust(6, '0')
    return text


# -----------------------------
# CSV import
# -----------------------------
HEADER_SCAN_ROWS = 10
HEADER_MARKERS = ("Title", "List Name")
CSV_COLUMNS = (
    "Title", "List Name", "Folder Name", "Tags", "Start Date", "Due Date",
    "Priority", "Status", "Completed Time", "Is All Day", "taskId",
)
UNKNOWN_LIST = "Unknown list"


def tokenize_csv(text: str) -> List[List[str]]:
    """Split raw CSV text into rows of fields in one left-to-right scan.

    Newlines and commas inside double quotes belong to the field, ``""`` inside
    a quoted field is a literal quote, and a final row without a trailing
    newline is kept.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    rows: List[List[str]] = []
    row: List[str] = []
    buf: List[str] = []
    in_quote = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            if in_quote and i + 1 < n and text[i + 1] == '"':
                buf.append('"')
                i += 2
                continue
            in_quote = not in_quote
        elif ch == ',' and not in_quote:
            row.append("".join(buf))
            buf = []
        elif ch == '\n' and not in_quote:
            row.append("".join(buf))
            buf = []
            rows.append(row)
            row = []
        else:
            buf.append(ch)
        i += 1
    if in_quote:
        raise MalformedInputError("Unterminated quoted field at end of input")
    if buf or row:
        row.append("".join(buf))
        rows.append(row)
    return rows


def find_header_row(rows: List[List[str]]) -> int:
    for idx, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        cells = {c.strip() for c in row}
        if all(marker in cells for marker in HEADER_MARKERS):
            return idx
    raise MissingHeaderError(
        f"No header row with {' and '.join(HEADER_MARKERS)} in the first {HEADER_SCAN_ROWS} rows; "
        "is this a TickTick backup CSV?"
    )


def map_row(record: Dict[str, str], resolver: CategoryResolver,
            tz: Optional[dt.tzinfo] = None) -> Optional[Task]:
    """Turn one header-keyed CSV record into a Task; rows without a title give None."""
    title = (record.get("Title") or "").strip()
    if not title:
        return None
    project_name = record.get("List Name") or record.get("Folder Name") or UNKNOWN_LIST
    raw_start = record.get("Start Date") or None
    raw_due = record.get("Due Date") or None
    raw_completed = record.get("Completed Time") or None
    start = parse_timestamp(raw_start, tz)
    due = parse_timestamp(raw_due, tz)
    completed = parse_timestamp(raw_completed, tz)
    if start is None and due is None and completed is None:
        warning = MissingReferenceDateWarning(title, raw_start, raw_due, raw_completed)
        logging.getLogger('tick_dashboard').warning("%s", warning)
    return Task(
        id=record.get("taskId") or f"csv_{uuid.uuid4().hex[:12]}",
        title=title,
        project_name=project_name,
        folder_name=resolver.resolve_folder(project_name),
        tags=_split_tags(record.get("Tags")),
        start_date=start,
        due_date=due,
        completed_time=completed,
        is_all_day=_truthy_flag(record.get("Is All Day")),
        priority=_normalize_priority(record.get("Priority")),
        status=_normalize_status(record.get("Status"), bool(raw_completed)),
        source="csv",
    )


def parse_csv(text: str, resolver: CategoryResolver, tz: Optional[dt.tzinfo] = None) -> List[Task]:
    rows = tokenize_csv(text)
    header_idx = find_header_row(rows)
    headers = [h.strip() for h in rows[header_idx]]
    tasks: List[Task] = []
    skipped = 0
    for values in rows[header_idx + 1:]:
        if len(values) < 3:
            skipped += 1
            continue
        record = {h: (values[i].strip() if i < len(values) else "") for i, h in enumerate(headers)}
        task = map_row(record, resolver, tz)
        if task is None:
            skipped += 1
            continue
        tasks.append(task)
    logging.getLogger('tick_dashboard').info(
        "Parsed %d tasks from CSV (header row %d, %d rows skipped)", len(tasks), header_idx, skipped)
    return tasks


def task_from_api(record: Dict[str, object], project: Dict[str, object], resolver: CategoryResolver,
                  tz: Optional[dt.tzinfo] = None) -> Optional[Task]:
    title = str(record.get("title") or "").strip()
    if not title:
        return None
    project_name = str(project.get("name") or UNKNOWN_LIST)
    raw_completed = record.get("completedTime") or None
    return Task(
        id=str(record.get("id") or f"api_{uuid.uuid4().hex[:12]}"),
        title=title,
        project_name=project_name,
        folder_name=resolver.resolve_folder(project_name),
        tags=_split_tags(record.get("tags")),
        start_date=parse_timestamp(record.get("startDate"), tz),
        due_date=parse_timestamp(record.get("dueDate"), tz),
        completed_time=parse_timestamp(raw_completed, tz),
        is_all_day=_truthy_flag(record.get("isAllDay")),
        priority=_normalize_priority(record.get("priority")),
        status=_normalize_status(record.get("status"), bool(raw_completed)),
        source="api",
        project_color=resolve_api_color(project.get("color")),
    )


# -----------------------------
# Time ranges
# -----------------------------
PERIODS = ("day", "week", "month", "quarter", "year")
MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def _as_date(value: object) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    raise TypeError(f"Expected a date or datetime, got {type(value).__name__}")


def _check_period(period: str) -> None:
    if period not in PERIODS:
        raise ValueError(f"period must be one of {' | '.join(PERIODS)}")


def _add_months(d: dt.date, months: int) -> dt.date:
    year, month0 = divmod(d.month - 1 + months, 12)
    year += d.year
    last = calendar.monthrange(year, month0 + 1)[1]
    return dt.date(year, month0 + 1, min(d.day, last))


def range_for(period: str, cursor: object) -> Tuple[dt.datetime, dt.datetime]:
    """Inclusive [start, end] of the calendar unit containing ``cursor``."""
    _check_period(period)
    d = _as_date(cursor)
    if period == 'day':
        first = last = d
    elif period == 'week':
        # ISO week: Monday start
        first = d - dt.timedelta(days=d.weekday())
        last = first + dt.timedelta(days=6)
    elif period == 'month':
        first = d.replace(day=1)
        last = d.replace(day=calendar.monthrange(d.year, d.month)[1])
    elif period == 'quarter':
        q_month = 3 * ((d.month - 1) // 3) + 1
        first = dt.date(d.year, q_month, 1)
        last = _add_months(first, 3) - dt.timedelta(days=1)
    else:
        first = dt.date(d.year, 1, 1)
        last = dt.date(d.year, 12, 31)
    return dt.datetime.combine(first, dt.time.min), dt.datetime.combine(last, dt.time.max)


def period_label(period: str, cursor: object) -> str:
    start, end = range_for(period, cursor)
    if period == 'day':
        return start.date().isoformat()
    if period == 'week':
        return f"{start.date().isoformat()} ~ {end.date().isoformat()}"
    if period == 'month':
        return f"{start.year}-{start.month:02d}"
    if period == 'quarter':
        return f"{start.year} Q{(start.month - 1) // 3 + 1}"
    return str(start.year)


def navigate(period: str, cursor: object, direction: int) -> dt.date:
    """Step the cursor by ``direction`` whole calendar units of ``period``."""
    _check_period(period)
    d = _as_date(cursor)
    if period == 'day':
        return d + dt.timedelta(days=direction)
    if period == 'week':
        return d + dt.timedelta(days=7 * direction)
    if period == 'month':
        return _add_months(d, direction)
    if period == 'quarter':
        return _add_months(d, 3 * direction)
    return _add_months(d, 12 * direction)


def _day_label(d: dt.date) -> str:
    return f"{d.month}/{d.day}"


def bucket_labels(period: str, start: dt.datetime, end: dt.datetime) -> List[str]:
    """X-axis categories for a range produced by :func:`range_for`."""
    _check_period(period)
    if period == 'day':
        return [f"{h:02d}:00" for h in range(24)]
    if period == 'year':
        return list(MONTH_LABELS)
    step = 7 if period == 'quarter' else 1
    labels: List[str] = []
    d = _as_date(start)
    last = _as_date(end)
    while d <= last:
        labels.append(str(d.day) if period == 'month' else _day_label(d))
        d += dt.timedelta(days=step)
    return labels


def bucket_for(period: str, moment: dt.datetime) -> str:
    _check_period(period)
    if period == 'day':
        return f"{moment.hour:02d}:00"
    d = _as_date(moment)
    if period == 'week':
        return _day_label(d)
    if period == 'month':
        return str(d.day)
    if period == 'quarter':
        q_start = range_for('quarter', d)[0].date()
        steps = (d - q_start).days // 7
        return _day_label(q_start + dt.timedelta(days=7 * steps))
    return MONTH_LABELS[d.month - 1]


# -----------------------------
# Filters
# -----------------------------
ALL_SENTINEL = "__all__"


@dataclass(frozen=True)
class FilterState:
    period: str = "day"
    cursor: dt.date = field(default_factory=dt.date.today)
    selected_projects: FrozenSet[str] = frozenset()
    selected_tags: FrozenSet[str] = frozenset()

    def __post_init__(self):
        _check_period(self.period)

    def range(self) -> Tuple[dt.datetime, dt.datetime]:
        return range_for(self.period, self.cursor)

    def label(self) -> str:
        return period_label(self.period, self.cursor)

    # Period and cursor moves always start from a clean selection.
    def with_period(self, period: str, today: Optional[dt.date] = None) -> "FilterState":
        return FilterState(period=period, cursor=today or dt.date.today())

    def with_cursor(self, cursor: dt.date) -> "FilterState":
        return FilterState(period=self.period, cursor=_as_date(cursor))

    def navigate(self, direction: int) -> "FilterState":
        return FilterState(period=self.period, cursor=navigate(self.period, self.cursor, direction))

    def today(self, today: Optional[dt.date] = None) -> "FilterState":
        return FilterState(period=self.period, cursor=today or dt.date.today())

    def toggle_project(self, name: str) -> "FilterState":
        if name == ALL_SENTINEL:
            return replace(self, selected_projects=frozenset())
        return replace(self, selected_projects=self.selected_projects ^ {name})

    def toggle_tag(self, tag: str) -> "FilterState":
        if tag == ALL_SENTINEL:
            return replace(self, selected_tags=frozenset())
        return replace(self, selected_tags=self.selected_tags ^ {tag})

    def clear_selections(self) -> "FilterState":
        return replace(self, selected_projects=frozenset(), selected_tags=frozenset())


def reference_date(task: Task) -> Optional[dt.datetime]:
    """Start date, else due date, else completion time."""
    return task.start_date or task.due_date or task.completed_time


def _in_range(task: Task, start: dt.datetime, end: dt.datetime) -> bool:
    ref = reference_date(task)
    return ref is not None and start <= ref <= end


def tasks_in_range(tasks: Iterable[Task], start: dt.datetime, end: dt.datetime) -> List[Task]:
    return [t for t in tasks if _in_range(t, start, end)]


def filter_tasks(tasks: Iterable[Task], state: FilterState) -> List[Task]:
    start, end = state.range()
    out: List[Task] = []
    for task in tasks:
        if state.selected_projects:
            if task.project_name not in state.selected_projects and task.folder_name not in state.selected_projects:
                continue
        if state.selected_tags:
            if not any(t in state.selected_tags for t in task.tags):
                continue
        if _in_range(task, start, end):
            out.append(task)
    return out


@dataclass
class ProjectGroup:
    folder: str
    projects: List[str]
    # API list colors keyed by project name
    colors: Dict[str, str] = field(default_factory=dict)

    @property
    def is_real_folder(self) -> bool:
        return any(p != self.folder for p in self.projects)


def project_groups(tasks: Iterable[Task], state: FilterState, resolver: CategoryResolver) -> List[ProjectGroup]:
    """Lists present in the active range, grouped under their folders (first-seen order)."""
    start, end = state.range()
    groups: Dict[str, ProjectGroup] = {}
    seen: set = set()
    for task in tasks_in_range(tasks, start, end):
        if task.project_name in seen:
            continue
        seen.add(task.project_name)
        folder = resolver.resolve_folder(task.project_name)
        group = groups.setdefault(folder, ProjectGroup(folder=folder, projects=[]))
        group.projects.append(task.project_name)
        if task.project_color:
            group.colors[task.project_name] = task.project_color
    return list(groups.values())


def tag_counts(tasks: Iterable[Task], state: FilterState) -> List[Tuple[str, int]]:
    start, end = state.range()
    counts: Dict[str, int] = {}
    for task in tasks_in_range(tasks, start, end):
        for tag in task.tags:
            counts[tag] = counts.get(tag, 0) + 1
    return sorted(counts.items(), key=lambda kv: kv[1], reverse=True)


# -----------------------------
# Aggregation
# -----------------------------
@dataclass
class Aggregate:
    name: str
    hours: float
    color: str
    folder: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {
            "name": self.name,
            "hours": self.hours,
            "duration": format_duration(self.hours),
            "color": self.color,
        }
        if self.folder is not None:
            out["folder"] = self.folder
        return out


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def duration_hours(start: Optional[dt.datetime], end: Optional[dt.datetime]) -> Optional[float]:
    """Hours between two datetimes, rounded to the minute."""
    if start is None or end is None:
        return None
    minutes = _round_half_up((end - start).total_seconds() / 60)
    return minutes / 60


def format_duration(hours: Optional[float]) -> str:
    """0.25 -> "15m", 1.5 -> "1h30m", 2 -> "2h"."""
    if hours is None:
        return "—"
    total = _round_half_up(hours * 60)
    h, m = divmod(total, 60)
    if h == 0:
        return f"{m}m"
    if m == 0:
        return f"{h}h"
    return f"{h}h{m}m"


def has_duration(task: Task) -> bool:
    if task.is_all_day or task.start_date is None or task.due_date is None:
        return False
    return task.due_date > task.start_date


def aggregate_projects(tasks: Iterable[Task], resolver: CategoryResolver) -> Dict[str, Aggregate]:
    out: Dict[str, Aggregate] = {}
    for task in tasks:
        if not has_duration(task):
            continue
        name = task.project_name or UNKNOWN_LIST
        agg = out.get(name)
        if agg is None:
            agg = out[name] = Aggregate(
                name=name,
                hours=0.0,
                color=resolver.resolve_project_color(name, task.project_color),
                folder=resolver.resolve_folder(name),
            )
        agg.hours += duration_hours(task.start_date, task.due_date)
    return out


def aggregate_folders(tasks: Iterable[Task], resolver: CategoryResolver) -> Dict[str, Aggregate]:
    """Roll project totals up to folders; independent lists keep their own name and color."""
    out: Dict[str, Aggregate] = {}
    for name, proj in aggregate_projects(tasks, resolver).items():
        folder = proj.folder or name
        if resolver.is_independent(name):
            color = proj.color
        else:
            color = resolver.resolve_folder_color(folder)
        agg = out.get(folder)
        if agg is None:
            agg = out[folder] = Aggregate(name=folder, hours=0.0, color=color)
        agg.hours += proj.hours
    return out


def bucket_matrix(tasks: Iterable[Task], period: str, labels: List[str]) -> Dict[str, List[float]]:
    """Per-project hours per bucket label, bucketed by due date (start date as fallback)."""
    index = {label: i for i, label in enumerate(labels)}
    out: Dict[str, List[float]] = {}
    for task in tasks:
        if not has_duration(task):
            continue
        row = out.setdefault(task.project_name or UNKNOWN_LIST, [0.0] * len(labels))
        when = task.due_date or task.start_date
        pos = index.get(bucket_for(period, when))
        if pos is None:
            continue
        row[pos] += duration_hours(task.start_date, task.due_date)
    return out


def sort_for_table(tasks: Iterable[Task]) -> List[Task]:
    """Open tasks first, then by start (or due) date; undated rows lead each group."""
    return sorted(tasks, key=lambda t: (t.is_completed, t.start_date or t.due_date or dt.datetime.min))


@dataclass
class DashboardView:
    period: str
    label: str
    range_start: dt.datetime
    range_end: dt.datetime
    filtered_tasks: List[Task]
    project_aggregates: Dict[str, Aggregate]
    folder_aggregates: Dict[str, Aggregate]
    bucket_labels: List[str]
    bucket_matrix: Dict[str, List[float]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "period": self.period,
            "label": self.label,
            "range": {
                "start": self.range_start.isoformat(timespec="seconds"),
                "end": self.range_end.isoformat(timespec="seconds"),
            },
            "tasks": [t.to_dict() for t in sort_for_table(self.filtered_tasks)],
            "projects": [a.as_dict() for a in self.project_aggregates.values()],
            "folders": [a.as_dict() for a in self.folder_aggregates.values()],
            "buckets": {
                "labels": list(self.bucket_labels),
                "series": [
                    {
                        "name": name,
                        "color": self.project_aggregates[name].color if name in self.project_aggregates else NEUTRAL_COLOR,
                        "data": values,
                    }
                    for name, values in self.bucket_matrix.items()
                ],
            },
        }


def apply_filters(tasks: Iterable[Task], state: FilterState, resolver: CategoryResolver) -> DashboardView:
    filtered = filter_tasks(tasks, state)
    start, end = state.range()
    labels = bucket_labels(state.period, start, end)
    return DashboardView(
        period=state.period,
        label=state.label(),
        range_start=start,
        range_end=end,
        filtered_tasks=filtered,
        project_aggregates=aggregate_projects(filtered, resolver),
        folder_aggregates=aggregate_folders(filtered, resolver),
        bucket_labels=labels,
        bucket_matrix=bucket_matrix(filtered, state.period, labels),
    )


# -----------------------------
# Cache
# -----------------------------
class TaskCache:
    """SQLite store of the last imported batch per source ("csv" / "api").

    The cache is best effort: unreadable rows or a corrupt file are dropped
    with a warning.
    """

    SCHEMA_COLUMNS = [
        "source", "id", "title", "project_name", "tags",
        "start_date", "due_date", "completed_time",
        "is_all_day", "priority", "status", "project_color",
    ]
    CREATE_TABLE_SQL = """
      CREATE TABLE IF NOT EXISTS tasks (
        row_id INTEGER PRIMARY KEY AUTOINCREMENT,
        source TEXT NOT NULL,
        id TEXT NOT NULL,
        title TEXT NOT NULL,
        project_name TEXT NOT NULL,
        tags TEXT,
        start_date TEXT,
        due_date TEXT,
        completed_time TEXT,
        is_all_day INTEGER DEFAULT 0,
        priority INTEGER DEFAULT 0,
        status INTEGER DEFAULT 0,
        project_color TEXT,
        UNIQUE(source, id)
      )
    """

    def __init__(self, path: str, resolver: Optional[CategoryResolver] = None):
        self.path = path
        self.resolver = resolver or CategoryResolver()
        try:
            self.conn = self._open()
        except sqlite3.DatabaseError:
            logging.getLogger('tick_dashboard').warning("Task cache %s is corrupt; discarding it", path, exc_info=True)
            if path != ":memory:":
                for stale in (path, path + "-wal", path + "-shm"):
                    if os.path.exists(stale):
                        os.remove(stale)
            self.conn = self._open()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            cols = [r[1] for r in conn.execute("PRAGMA table_info(tasks)").fetchall()]
            if cols and any(c not in cols for c in self.SCHEMA_COLUMNS):
                # Older layout; cached batches are disposable.
                conn.execute("DROP TABLE tasks")
            conn.execute(self.CREATE_TABLE_SQL)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_source ON tasks(source)")
            conn.commit()
        except sqlite3.DatabaseError:
            conn.close()
            raise
        return conn

    def replace_all(self, tasks: List[Task], source: str) -> None:
        """Swap the whole batch for ``source``; nothing is merged."""
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            cur.execute("DELETE FROM tasks WHERE source=?", (source,))
            cur.executemany(
                f"INSERT OR REPLACE INTO tasks ({', '.join(self.SCHEMA_COLUMNS)}) "
                f"VALUES ({', '.join(['?'] * len(self.SCHEMA_COLUMNS))})",
                [
                    (
                        source,
                        t.id,
                        t.title,
                        t.project_name,
                        json.dumps(t.tags, ensure_ascii=False),
                        t.start_date.isoformat() if t.start_date else None,
                        t.due_date.isoformat() if t.due_date else None,
                        t.completed_time.isoformat() if t.completed_time else None,
                        int(t.is_all_day),
                        int(t.priority),
                        int(t.status),
                        t.project_color,
                    )
                    for t in tasks
                ],
            )
            cur.execute("COMMIT")
        except Exception:
            try:
                cur.execute("ROLLBACK")
            except sqlite3.Error:
                pass
            raise

    def clear(self, source: Optional[str] = None) -> None:
        if source:
            self.conn.execute("DELETE FROM tasks WHERE source=?", (source,))
        else:
            self.conn.execute("DELETE FROM tasks")
        self.conn.commit()

    def _row_to_task(self, row: Tuple) -> Task:
        (source, tid, title, project_name, tags_json, start, due, completed,
         is_all_day, priority, status, project_color) = row
        tags = json.loads(tags_json or "[]")
        if not isinstance(tags, list):
            raise ValueError("tags column is not a list")

        def _dt(value: Optional[str]) -> Optional[dt.datetime]:
            return dt.datetime.fromisoformat(value) if value else None

        return Task(
            id=tid,
            title=title,
            project_name=project_name,
            # Never trust a stored folder; the mapping table may have changed.
            folder_name=self.resolver.resolve_folder(project_name),
            tags=[str(t) for t in tags],
            start_date=_dt(start),
            due_date=_dt(due),
            completed_time=_dt(completed),
            is_all_day=bool(is_all_day),
            priority=int(priority or 0),
            status=int(status or 0),
            source=source,
            project_color=project_color,
        )

    def load(self, source: Optional[str] = None) -> List[Task]:
        try:
            cur = self.conn.cursor()
            if source:
                cur.execute(
                    f"SELECT {', '.join(self.SCHEMA_COLUMNS)} FROM tasks WHERE source=? ORDER BY row_id",
                    (source,),
                )
            else:
                cur.execute(f"SELECT {', '.join(self.SCHEMA_COLUMNS)} FROM tasks ORDER BY row_id")
            rows = cur.fetchall()
        except sqlite3.DatabaseError:
            logging.getLogger('tick_dashboard').warning("Task cache unreadable; starting empty", exc_info=True)
            return []
        out: List[Task] = []
        dropped = 0
        for row in rows:
            try:
                out.append(self._row_to_task(row))
            except (ValueError, TypeError):
                dropped += 1
        if dropped:
            logging.getLogger('tick_dashboard').warning("Discarded %d corrupt cached task rows", dropped)
        return out

    def close(self) -> None:
        self.conn.close()


# -----------------------------
# Open API
# -----------------------------
@dataclass
class FetchTasksResult:
    projects: List[Dict[str, object]]
    tasks: List[Task]
    failed_projects: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed_projects)


class TokenStore:
    """JSON file holding the OAuth access token and its expiry (epoch seconds)."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Dict[str, object]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logging.getLogger('tick_dashboard').warning("Token file %s unreadable; ignoring it", self.path)
            return {}
        if not isinstance(data, dict) or not data.get("access_token"):
            return {}
        return data

    def save(self, access_token: str, token_type: Optional[str] = None,
             expires_in: Optional[float] = None) -> Dict[str, object]:
        data = {
            "access_token": access_token,
            "token_type": token_type or "Bearer",
            "expires_at": (time.time() + float(expires_in)) if expires_in else None,
        }
        directory = os.path.dirname(self.path)
        if directory and not os.path.isdir(directory):
            os.makedirs(directory, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        return data

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)

    def valid_token(self, now: Optional[float] = None) -> Optional[Dict[str, object]]:
        data = self.load()
        if not data:
            return None
        expires_at = data.get("expires_at")
        now = time.time() if now is None else now
        try:
            expired = bool(expires_at) and now >= float(expires_at)
        except (TypeError, ValueError):
            logging.getLogger('tick_dashboard').warning("Token file %s has a bad expires_at %r; ignoring it", self.path, expires_at)
            return None
        if expired:
            logging.getLogger('tick_dashboard').info("Stored access token expired")
            return None
        return data


def auth_status(store: TokenStore, now: Optional[float] = None) -> Dict[str, object]:
    data = store.load()
    return {
        "authorized": store.valid_token(now) is not None,
        "expires_at": data.get("expires_at"),
    }


def build_authorize_url(api: ApiSettings, state: Optional[str] = None) -> str:
    if not api.client_id:
        raise ValueError("client_id is required for OAuth login")
    params = {
        "client_id": api.client_id,
        "redirect_uri": api.redirect_uri,
        "response_type": "code",
        "scope": api.scope,
    }
    if state:
        params["state"] = state
    return f"{api.authorize_url}?{urlencode(params)}"


def exchange_code(api: ApiSettings, code: str, store: TokenStore) -> Dict[str, object]:
    """Trade an authorization code for an access token and persist it."""
    try:
        resp = requests.post(
            api.token_url,
            data={"code": code, "grant_type": "authorization_code", "redirect_uri": api.redirect_uri},
            auth=(api.client_id, api.client_secret),
            timeout=api.timeout,
        )
    except requests.RequestException as exc:
        raise UpstreamUnavailableError(f"Token endpoint unreachable: {exc}") from exc
    if resp.status_code >= 300:
        logging.getLogger('tick_dashboard').error("Token exchange failed: HTTP %s %s", resp.status_code, resp.text[:200])
        raise AuthRequiredError(f"Token exchange failed (HTTP {resp.status_code})")
    payload = resp.json() or {}
    token = payload.get("access_token")
    if not token:
        raise AuthRequiredError("Token endpoint returned no access_token")
    logging.getLogger('tick_dashboard').info("Authorization succeeded; access token stored")
    return store.save(token, payload.get("token_type"), payload.get("expires_in"))


def _session(token: str, token_type: str = "Bearer") -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"{token_type} {token}"
    s.headers["Accept"] = "application/json"
    return s


def _api_get(session: requests.Session, url: str, timeout: float) -> object:
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise UpstreamUnavailableError(f"GET {url} failed: {exc}") from exc
    if resp.status_code == 401:
        raise AuthRequiredError("Access token rejected (HTTP 401)")
    if resp.status_code >= 300:
        raise UpstreamUnavailableError(f"GET {url} returned HTTP {resp.status_code}")
    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamUnavailableError(f"GET {url} returned invalid JSON") from exc


ProgressCB = Callable[[int, int, str], None]  # (done, total, status_line)


def fetch_all_tasks(
    token: str,
    api: ApiSettings,
    resolver: CategoryResolver,
    tz: Optional[dt.tzinfo] = None,
    token_type: str = "Bearer",
    progress: Optional[ProgressCB] = None,
) -> FetchTasksResult:
    """List every project, then fetch each project's tasks concurrently.

    A list that fails (HTTP error, timeout, rejected token) contributes no
    tasks; only a failure of the project listing itself is raised.
    """
    base = api.base_url.rstrip('/')
    projects = _api_get(_session(token, token_type), f"{base}/project", api.timeout)
    if not isinstance(projects, list):
        raise UpstreamUnavailableError("Project listing is not a JSON array")
    projects = [p for p in projects if isinstance(p, dict) and p.get("id")]
    total = len(projects)
    logging.getLogger('tick_dashboard').info("Fetching tasks from %d lists", total)

    def _fetch_project(project: Dict[str, object]) -> List[Dict[str, object]]:
        data = _api_get(_session(token, token_type), f"{base}/project/{project['id']}/data", api.timeout)
        tasks = (data or {}).get("tasks") if isinstance(data, dict) else None
        return [t for t in (tasks or []) if isinstance(t, dict)]

    results_by_idx: Dict[int, List[Dict[str, object]]] = {}
    failed: List[str] = []
    done = 0
    if total:
        with ThreadPoolExecutor(max_workers=min(4, total)) as executor:
            future_map = {executor.submit(_fetch_project, p): idx for idx, p in enumerate(projects)}
            for future in as_completed(future_map):
                idx = future_map[future]
                name = str(projects[idx].get("name") or projects[idx]["id"])
                try:
                    results_by_idx[idx] = future.result()
                except (UpstreamUnavailableError, AuthRequiredError) as exc:
                    logging.getLogger('tick_dashboard').warning("Fetching list %s failed: %s", name, exc)
                    results_by_idx[idx] = []
                    failed.append(name)
                done += 1
                if progress:
                    progress(done, total, f"Finished {name}")

    out: List[Task] = []
    for idx, project in enumerate(projects):
        for record in results_by_idx.get(idx, []):
            task = task_from_api(record, project, resolver, tz)
            if task is not None:
                out.append(task)
    logging.getLogger('tick_dashboard').info("Fetched %d tasks (%d lists failed)", len(out), len(failed))
    return FetchTasksResult(projects=projects, tasks=out, failed_projects=failed)


# -----------------------------
# Dashboard
# -----------------------------
class Dashboard:
    """In-memory task batches plus the single recomputation entry point."""

    def __init__(self, config: Config, cache: Optional[TaskCache] = None):
        self.config = config
        self.resolver = config.resolver()
        self.tz = config.tzinfo()
        self.cache = cache
        self.csv_tasks: List[Task] = []
        self.api_tasks: List[Task] = []

    @property
    def tasks(self) -> List[Task]:
        return self.csv_tasks + self.api_tasks

    def _persist(self, tasks: List[Task], source: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.replace_all(tasks, source)
        except sqlite3.Error:
            logging.getLogger('tick_dashboard').warning("Could not persist %s batch", source, exc_info=True)

    def restore(self) -> int:
        if self.cache is None:
            return 0
        self.csv_tasks = self.cache.load("csv")
        self.api_tasks = self.cache.load("api")
        return len(self.csv_tasks) + len(self.api_tasks)

    def import_csv(self, text: str) -> int:
        # Parse fully before touching state so a bad file keeps the old batch.
        tasks = parse_csv(text, self.resolver, self.tz)
        self.csv_tasks = tasks
        self._persist(tasks, "csv")
        return len(tasks)

    def import_csv_file(self, path: str) -> int:
        with open(path, 'r', encoding='utf-8-sig', newline='') as f:
            return self.import_csv(f.read())

    def clear_csv(self) -> None:
        self.csv_tasks = []
        if self.cache is not None:
            self.cache.clear("csv")

    def fetch_api(self, store: TokenStore, progress: Optional[ProgressCB] = None) -> FetchTasksResult:
        """Network half of a refresh; leaves state and cache untouched."""
        token = store.valid_token()
        if not token:
            raise AuthRequiredError("Not authorised; run with --login first")
        return fetch_all_tasks(
            str(token["access_token"]),
            self.config.api,
            self.resolver,
            self.tz,
            token_type=str(token.get("token_type") or "Bearer"),
            progress=progress,
        )

    def apply_api(self, result: FetchTasksResult) -> None:
        # Must run on the thread that opened the cache connection.
        self.api_tasks = result.tasks
        self._persist(result.tasks, "api")

    def load_api(self, store: TokenStore, progress: Optional[ProgressCB] = None) -> FetchTasksResult:
        result = self.fetch_api(store, progress)
        self.apply_api(result)
        return result

    def apply_filters(self, state: FilterState) -> DashboardView:
        return apply_filters(self.tasks, state, self.resolver)


# -----------------------------
# UI helpers (fragments only)
# -----------------------------
def _char_width(ch: str) -> int:
    """Return printable cell width for a single character."""
    if unicodedata.combining(ch) or unicodedata.category(ch) == "Cf":
        return 0
    fallback = 2 if unicodedata.east_asian_width(ch) in ("W", "F") else 1
    width = int(_pt_get_cwidth(ch))
    if width <= 0:
        return fallback
    return max(width, fallback)


def _display_width(text: str) -> int:
    return sum(_char_width(ch) for ch in text)


def _truncate(s: Optional[str], maxlen: int) -> str:
    """Truncate string to a maximum display width, preserving whole glyphs."""
    s = (s or "").replace("\n", " ").replace("\r", " ")
    if maxlen <= 0:
        return ""
    if _display_width(s) <= maxlen:
        return s
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = _char_width(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + "…"


def _pad_display(text: Optional[str], width: int, align: str = "left") -> str:
    raw = _truncate(text, width)
    pad = max(0, width - _display_width(raw))
    if align == "right":
        return " " * pad + raw
    return raw + " " * pad


def format_datetime(d: Optional[dt.datetime]) -> str:
    return d.strftime("%m-%d %H:%M") if d else "—"


def build_header_fragments(view: DashboardView, status_line: str = "") -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = [
        ("bold", f" {view.period.upper()} "),
        ("", "  "),
        ("bold", view.label),
        ("", f"   {len(view.filtered_tasks)} tasks"),
    ]
    if status_line:
        frags.append(("italic", f"   {status_line}"))
    frags.append(("", "\n"))
    return frags


def _chip(label: str, color: str, selected: bool, focused: bool) -> Tuple[str, str]:
    style = f"fg:{color}"
    if selected:
        style = f"bg:{color} fg:#ffffff bold"
    if focused:
        style += " underline"
    return (style, f"[{label}]")


def filter_choices(groups: List[ProjectGroup]) -> List[str]:
    """Flatten project groups into the order chips are drawn (folder before members)."""
    out: List[str] = []
    for group in groups:
        if group.is_real_folder:
            out.append(group.folder)
        out.extend(group.projects)
    return out


def build_filter_fragments(groups: List[ProjectGroup], tags: List[Tuple[str, int]], state: FilterState,
                           resolver: CategoryResolver, project_focus: int = -1,
                           tag_focus: int = -1) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    # A single list needs no filter bar.
    if sum(len(g.projects) for g in groups) >= 2:
        frags.append(("bold", "Lists: "))
        frags.append(("reverse" if not state.selected_projects else "", "[all]"))
        pos = 0
        for group in groups:
            frags.append(("", "  "))
            if group.is_real_folder:
                frags.append(_chip(group.folder, resolver.resolve_folder_color(group.folder),
                                   group.folder in state.selected_projects, pos == project_focus))
                frags.append(("", " "))
                pos += 1
            for name in group.projects:
                frags.append(_chip(name, resolver.resolve_project_color(name, group.colors.get(name)),
                                   name in state.selected_projects, pos == project_focus))
                frags.append(("", " "))
                pos += 1
        frags.append(("", "\n"))
    if tags:
        frags.append(("bold", "Tags:  "))
        frags.append(("reverse" if not state.selected_tags else "", "[all]"))
        for i, (tag, count) in enumerate(tags):
            style = "reverse" if tag in state.selected_tags else ""
            if i == tag_focus:
                style = (style + " underline").strip()
            frags.append(("", " "))
            frags.append((style, f"#{tag} {count}"))
        frags.append(("", "\n"))
    return frags


TABLE_HEADER = (
    f"{_pad_display('Title', 32)}  {_pad_display('List', 14)}  {_pad_display('Tags', 14)}  "
    f"{_pad_display('Start', 11)}  {_pad_display('Due', 11)}  {_pad_display('Time', 7)}  "
    f"{_pad_display('Prio', 6)}  Status"
)


def build_table_fragments(tasks: List[Task], resolver: CategoryResolver, offset: int = 0,
                          limit: Optional[int] = None) -> List[Tuple[str, str]]:
    """Return a list of (style, text) tuples for FormattedTextControl."""
    if not tasks:
        return [("italic", "No tasks in this period.")]
    rows = sort_for_table(tasks)
    visible = rows[offset:offset + limit] if limit else rows[offset:]
    frags: List[Tuple[str, str]] = [("bold", TABLE_HEADER), ("", "\n")]
    for t in visible:
        if t.is_all_day:
            start_cell = due_cell = time_cell = "all day"
        else:
            start_cell = format_datetime(t.start_date)
            due_cell = format_datetime(t.due_date)
            time_cell = format_duration(duration_hours(t.start_date, t.due_date)) if has_duration(t) else "—"
        if t.is_completed:
            status = f"done {format_datetime(t.completed_time)}" if t.completed_time else "done"
        else:
            status = "open"
        row_style = "fg:#808080" if t.is_completed else ""
        frags.append((row_style, _pad_display(t.title, 32) + "  "))
        frags.append((f"fg:{resolver.resolve_project_color(t.project_name, t.project_color)}", _pad_display(t.project_name, 14)))
        frags.append((row_style,
                      f"  {_pad_display(', '.join(t.tags) or '—', 14)}  {_pad_display(start_cell, 11)}  "
                      f"{_pad_display(due_cell, 11)}  {_pad_display(time_cell, 7, 'right')}  "
                      f"{_pad_display(t.priority_label, 6)}  {status}"))
        frags.append(("", "\n"))
    hidden = len(rows) - offset - len(visible)
    if hidden > 0:
        frags.append(("italic", f"… {hidden} more (j/k to scroll)"))
    elif frags[-1] == ("", "\n"):
        frags.pop()
    return frags


def _bar(value: float, maxv: float, width: int = 30) -> str:
    if value <= 0 or maxv <= 0:
        return ""
    return '█' * max(1, int(width * value / maxv))


def build_breakdown_fragments(title: str, aggregates: Dict[str, Aggregate]) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = [("bold", title), ("", "\n")]
    if not aggregates:
        frags.append(("italic", "  (no timed tasks)"))
        frags.append(("", "\n"))
        return frags
    items = sorted(aggregates.values(), key=lambda a: a.hours, reverse=True)
    total = sum(a.hours for a in items) or 1.0
    maxv = items[0].hours
    for agg in items:
        pct = int(round(100 * agg.hours / total))
        frags.append((f"fg:{agg.color}", "  ● "))
        frags.append(("", f"{_pad_display(agg.name, 18)} {format_duration(agg.hours):>7} {pct:3d}%  "))
        frags.append((f"fg:{agg.color}", _bar(agg.hours, maxv)))
        frags.append(("", "\n"))
    return frags


def build_bucket_fragments(view: DashboardView, width: int = 40) -> List[Tuple[str, str]]:
    """Horizontal stacked bars, one line per non-empty bucket."""
    frags: List[Tuple[str, str]] = [("bold", "Timeline"), ("", "\n")]
    totals = [sum(row[i] for row in view.bucket_matrix.values()) for i in range(len(view.bucket_labels))]
    maxv = max(totals, default=0.0)
    if maxv <= 0:
        frags.append(("italic", "  (no timed tasks)"))
        return frags
    for i, label in enumerate(view.bucket_labels):
        if totals[i] <= 0:
            continue
        frags.append(("", f"  {label:>6} {format_duration(totals[i]):>7} "))
        for name, row in view.bucket_matrix.items():
            if row[i] <= 0:
                continue
            agg = view.project_aggregates.get(name)
            color = agg.color if agg else NEUTRAL_COLOR
            frags.append((f"fg:{color}", '█' * max(1, int(width * row[i] / maxv))))
        frags.append(("", "\n"))
    return frags


# -----------------------------
# TUI
# -----------------------------
HELP_LINE = "1-5 period  h/l prev/next  t today  p/P list  g/G tag  a clear  j/k scroll  u refresh  q quit"
PERIOD_KEYS = {'1': 'day', '2': 'week', '3': 'month', '4': 'quarter', '5': 'year'}


def setup_logging(log_path: str, log_level: str = 'ERROR') -> logging.Logger:
    logger = logging.getLogger('tick_dashboard')
    # Reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    fh.setLevel(getattr(logging, str(log_level).upper(), logging.ERROR))
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


def run_ui(dashboard: Dashboard, store: TokenStore, state: Optional[FilterState] = None) -> None:
    """Full-screen dashboard: header, filter chips, task table and breakdowns."""
    logger = logging.getLogger('tick_dashboard')
    state = state or FilterState(period=dashboard.config.period)
    view = dashboard.apply_filters(state)
    status_line = ""
    project_focus = -1
    tag_focus = -1
    table_offset = 0
    update_in_progress = False

    def recompute() -> None:
        nonlocal view
        view = dashboard.apply_filters(state)

    def set_state(new_state: FilterState) -> None:
        nonlocal state, project_focus, tag_focus, table_offset
        if (new_state.period, new_state.cursor) != (state.period, state.cursor):
            project_focus = tag_focus = -1
            table_offset = 0
        state = new_state
        recompute()

    def body() -> List[Tuple[str, str]]:
        groups = project_groups(dashboard.tasks, state, dashboard.resolver)
        tags = tag_counts(dashboard.tasks, state)
        frags = build_header_fragments(view, status_line)
        frags += build_filter_fragments(groups, tags, state, dashboard.resolver, project_focus, tag_focus)
        frags.append(("", "\n"))
        frags += build_table_fragments(view.filtered_tasks, dashboard.resolver, offset=table_offset, limit=20)
        frags.append(("", "\n\n"))
        frags += build_breakdown_fragments("By folder", view.folder_aggregates)
        frags += build_breakdown_fragments("By list", view.project_aggregates)
        frags += build_bucket_fragments(view)
        return frags

    body_window = Window(content=FormattedTextControl(text=body), wrap_lines=False, always_hide_cursor=True)
    help_window = Window(height=1, content=FormattedTextControl(text=lambda: [("reverse", HELP_LINE)]))
    root = HSplit([Frame(body_window, title="tick-dashboard"), help_window])
    kb = KeyBindings()

    @kb.add('q')
    @kb.add('c-c')
    def _quit(event):
        event.app.exit()

    def _period_handler(period: str):
        def handler(event):
            set_state(state.with_period(period))
        return handler

    for key, period in PERIOD_KEYS.items():
        kb.add(key)(_period_handler(period))

    @kb.add('h')
    @kb.add('left')
    def _prev(event):
        set_state(state.navigate(-1))

    @kb.add('l')
    @kb.add('right')
    def _next(event):
        set_state(state.navigate(1))

    @kb.add('t')
    def _today(event):
        set_state(state.today())

    @kb.add('a')
    def _clear(event):
        set_state(state.clear_selections())

    @kb.add('p')
    def _project_focus(event):
        nonlocal project_focus
        choices = filter_choices(project_groups(dashboard.tasks, state, dashboard.resolver))
        project_focus = (project_focus + 1) % len(choices) if choices else -1

    @kb.add('P')
    def _project_toggle(event):
        choices = filter_choices(project_groups(dashboard.tasks, state, dashboard.resolver))
        if 0 <= project_focus < len(choices):
            set_state(state.toggle_project(choices[project_focus]))

    @kb.add('g')
    def _tag_focus(event):
        nonlocal tag_focus
        tags = tag_counts(dashboard.tasks, state)
        tag_focus = (tag_focus + 1) % len(tags) if tags else -1

    @kb.add('G')
    def _tag_toggle(event):
        tags = tag_counts(dashboard.tasks, state)
        if 0 <= tag_focus < len(tags):
            set_state(state.toggle_tag(tags[tag_focus][0]))

    @kb.add('j')
    @kb.add('down')
    def _down(event):
        nonlocal table_offset
        table_offset = min(max(0, len(view.filtered_tasks) - 1), table_offset + 1)

    @kb.add('k')
    @kb.add('up')
    def _up(event):
        nonlocal table_offset
        table_offset = max(0, table_offset - 1)

    async def update_worker(app: Application) -> None:
        nonlocal status_line, update_in_progress
        if update_in_progress:
            return
        update_in_progress = True
        status_line = "Updating..."
        app.invalidate()

        def progress(done_val: int, total_val: int, line: str) -> None:
            nonlocal status_line
            status_line = f"{done_val}/{total_val} {line}"
            app.invalidate()

        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, lambda: dashboard.fetch_api(store, progress))
            dashboard.apply_api(result)
            status_line = f"Fetched {len(result.tasks)} tasks"
            if result.partial:
                status_line += f" ({len(result.failed_projects)} lists failed)"
        except AuthRequiredError as exc:
            status_line = f"Login required: {exc}"
        except TickDashboardError as exc:
            status_line = f"Error: {exc}"
            logger.exception("Update failed")
        finally:
            update_in_progress = False
            recompute()
            app.invalidate()

    @kb.add('u')
    def _update(event):
        event.app.create_background_task(update_worker(event.app))

    style = Style.from_dict({"frame.label": "bold"})
    app = Application(layout=Layout(root), key_bindings=kb, full_screen=True, style=style)
    app.run()


# -----------------------------
# CLI
# -----------------------------
def _print_summary(view: DashboardView) -> None:
    print(f"{view.period} {view.label}: {len(view.filtered_tasks)} tasks")
    for title, aggregates in (("Folders", view.folder_aggregates), ("Lists", view.project_aggregates)):
        print(f"{title}:")
        if not aggregates:
            print("  (no timed tasks)")
        for agg in sorted(aggregates.values(), key=lambda a: a.hours, reverse=True):
            print(f"  {_pad_display(agg.name, 20)} {format_duration(agg.hours):>7}")


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="TickTick / Dida365 task analytics dashboard")
    ap.add_argument("--config", help="Path to YAML config (optional)")
    ap.add_argument("--db", default=os.path.expanduser("~/.tick_dashboard.db"), help="Path to sqlite task cache")
    ap.add_argument("--token-file", default=os.path.expanduser("~/.tick_dashboard.token.json"),
                    help="Where the OAuth access token is kept")
    ap.add_argument("--import-csv", metavar="PATH", help="Import a TickTick backup CSV (replaces the previous import)")
    ap.add_argument("--clear-csv", action="store_true", help="Forget the imported CSV batch")
    ap.add_argument("--fetch", action="store_true", help="Fetch tasks from the Open API before showing them")
    ap.add_argument("--login", action="store_true", help="Print the OAuth authorization URL and exit")
    ap.add_argument("--auth-code", metavar="CODE", help="Exchange an OAuth authorization code for a token and exit")
    ap.add_argument("--status", action="store_true", help="Print authorization status and exit")
    ap.add_argument("--period", choices=PERIODS, help="Initial period (default from config)")
    ap.add_argument("--date", help="Cursor date YYYY-MM-DD (default today)")
    ap.add_argument("--export-report", metavar="PATH", help="Write the chart payload for the period to PATH (JSON)")
    ap.add_argument("--no-ui", action="store_true", help="Print a plain summary instead of the full-screen UI")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    args = ap.parse_args(argv)

    log_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'tick_dashboard.log')
    setup_logging(log_path, args.log_level)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        sys.exit(2)
    load_dotenv_secrets(cfg.api)
    store = TokenStore(args.token_file)

    if args.status:
        status = auth_status(store)
        print("authorized" if status["authorized"] else "not authorized")
        return
    try:
        if args.login:
            print(build_authorize_url(cfg.api, state=uuid.uuid4().hex))
            return
        if args.auth_code:
            exchange_code(cfg.api, args.auth_code, store)
            print("Authorization saved.")
            return
    except (ValueError, TickDashboardError) as e:
        print(f"Login failed: {e}", file=sys.stderr)
        sys.exit(2)

    dashboard = Dashboard(cfg, TaskCache(args.db, cfg.resolver()))
    dashboard.restore()

    if args.clear_csv:
        dashboard.clear_csv()
    if args.import_csv:
        try:
            count = dashboard.import_csv_file(args.import_csv)
        except (OSError, MalformedInputError) as e:
            print(f"CSV import failed: {e}", file=sys.stderr)
            sys.exit(2)
        print(f"Imported {count} tasks from {args.import_csv}")
    if args.fetch:
        try:
            result = dashboard.load_api(store)
        except AuthRequiredError as e:
            print(f"{e}", file=sys.stderr)
            sys.exit(2)
        except UpstreamUnavailableError as e:
            print(f"Fetch failed: {e}", file=sys.stderr)
            sys.exit(2)
        if result.partial:
            print(f"Warning: {len(result.failed_projects)} lists could not be fetched", file=sys.stderr)

    try:
        cursor = dt.date.fromisoformat(args.date) if args.date else dt.date.today()
    except ValueError:
        print(f"Invalid --date {args.date!r}; expected YYYY-MM-DD", file=sys.stderr)
        sys.exit(2)
    state = FilterState(period=args.period or cfg.period, cursor=cursor)

    if args.export_report:
        payload = dashboard.apply_filters(state).as_dict()
        try:
            with open(args.export_report, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            print(f"Wrote report JSON to {args.export_report}")
        except OSError as e:
            print(f"Failed to write report: {e}", file=sys.stderr)
            sys.exit(2)
        return

    if args.no_ui:
        _print_summary(dashboard.apply_filters(state))
        return

    run_ui(dashboard, store, state)


if __name__ == "__main__":
    main()
