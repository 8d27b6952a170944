"""Story calendar — parse in-fiction dates, compute day deltas and relative labels.

Two shapes come out of parsing:
- StandardDate: a real calendar date (year optional), e.g. "2024/3/5", "10/1",
  "小镇历2931年2月1日".
- FantasyDate: anything calendar-like that is not a real date, e.g. "霜降月第三日".
  The original text is always kept for display.

Recognizers are tried in order, first match wins.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import MAXYEAR, MINYEAR, date, timedelta
from typing import Callable

WEEKDAY_NAMES = ["日", "一", "二", "三", "四", "五", "六"]

DEFAULT_YEAR = 2024

# calculate_relative_time sentinels (cross-month fantasy distance is unknowable)
EARLIER = -999
AFTER = -998
BEFORE = -997

CHINESE_NUMS = {
    "零": 0, "〇": 0,
    "一": 1, "二": 2, "三": 3, "四": 4, "五": 5,
    "六": 6, "七": 7, "八": 8, "九": 9, "十": 10,
    "十一": 11, "十二": 12, "十三": 13, "十四": 14, "十五": 15,
    "十六": 16, "十七": 17, "十八": 18, "十九": 19, "二十": 20,
    "廿": 20, "廿一": 21, "廿二": 22, "廿三": 23, "廿四": 24, "廿五": 25,
    "廿六": 26, "廿七": 27, "廿八": 28, "廿九": 29, "三十": 30,
    "三十一": 31, "卅": 30, "卅一": 31,
}  # fmt: skip

# Longest numeral first so "十三" wins over "十" and "三"
_CN_DAY_PATTERNS = [
    (
        [
            re.compile(f"第{cn}日"),
            re.compile(f"第{cn}(?![一-龥])"),
            re.compile(f"月{cn}日"),
            re.compile(f"{cn}日"),
        ],
        num,
    )
    for cn, num in sorted(CHINESE_NUMS.items(), key=lambda kv: -len(kv[0]))
]

_WEEKDAY_HINT = re.compile(r"\(([日一二三四五六])\)")
_WEEKDAY_HINT_STRIP = re.compile(r"\s*\([日一二三四五六]\)\s*")
_PLACEHOLDER = re.compile(r"[xX]{2}|[?？]{2}")

_FULL_NUMERIC = re.compile(r"^(\d{4,})[/\-](\d{1,2})[/\-](\d{1,2})")
_SHORT_NUMERIC = re.compile(r"^(\d{1,2})[/\-](\d{1,2})(?:\s|$)")
_YEAR_CN = re.compile(r"(\d+)年\s*(\d{1,2})月(\d{1,2})日?")
_MONTH_DAY_CN = re.compile(r"(\d{1,2})月(\d{1,2})日?")

_MONTH_TOKEN = re.compile(r"([^\s\d]+月)")
_NUMERIC_MONTH = re.compile(r"(?:\d{4}[/\-])?(\d{1,2})[/\-]\d{1,2}")
_DAY_PREFIXED = re.compile(r"(?:第|Day\s*|day\s*)(\d+)(?:日)?", re.IGNORECASE)
_DAY_SUFFIXED = re.compile(r"(\d+)(?:日|号)")
_ANY_NUMBER = re.compile(r"(\d+)")


# ── Date shapes ──────────────────────────────────────────────


@dataclass(frozen=True)
class StandardDate:
    """A real calendar date. Year is optional ("10/1")."""

    month: int
    day: int
    year: int | None = None
    calendar_prefix: str | None = None

    type = "standard"


@dataclass(frozen=True)
class FantasyDate:
    """A non-calendar date token. `raw` is the original text, kept for display."""

    raw: str
    month_id: str | None = None
    day: int | None = None
    weekday_hint: str | None = None

    type = "fantasy"


StoryDate = StandardDate | FantasyDate


# ── Parsing ─────────────────────────────────────────────────


def _valid(month: int, day: int) -> bool:
    return 1 <= month <= 12 and 1 <= day <= 31


def _full_numeric(text: str) -> StoryDate | None:
    m = _FULL_NUMERIC.match(text)
    if not m:
        return None
    year, month, day = int(m.group(1)), int(m.group(2)), int(m.group(3))
    return StandardDate(month=month, day=day, year=year) if _valid(month, day) else None


def _short_numeric(text: str) -> StoryDate | None:
    m = _SHORT_NUMERIC.match(text)
    if not m:
        return None
    month, day = int(m.group(1)), int(m.group(2))
    return StandardDate(month=month, day=day) if _valid(month, day) else None


def _year_month_day_cn(text: str) -> StoryDate | None:
    # Must run before _month_day_cn, otherwise the year is lost
    m = _YEAR_CN.search(text)
    if not m:
        return None
    year, month, day = int(m.group(1)), int(m.group(2)), int(m.group(3))
    if not _valid(month, day):
        return None
    prefix = text[: m.start()].strip() or None
    return StandardDate(month=month, day=day, year=year, calendar_prefix=prefix)


def _month_day_cn(text: str) -> StoryDate | None:
    m = _MONTH_DAY_CN.search(text)
    if not m:
        return None
    month, day = int(m.group(1)), int(m.group(2))
    return StandardDate(month=month, day=day) if _valid(month, day) else None


_RECOGNIZERS: list[Callable[[str], StoryDate | None]] = [
    _full_numeric,
    _short_numeric,
    _year_month_day_cn,
    _month_day_cn,
]


def extract_month_identifier(text: str) -> str | None:
    """Return a month token like "霜降月", or "3月" for numeric M/D text."""
    m = _MONTH_TOKEN.search(text)
    if m:
        return m.group(1)
    m = _NUMERIC_MONTH.search(text)
    if m:
        return f"{int(m.group(1))}月"
    return None


def extract_day_number(text: str) -> int | None:
    """Find a day number: "第3日", "Day 3", "3日", Chinese numerals, then any number."""
    m = _DAY_PREFIXED.search(text) or _DAY_SUFFIXED.search(text)
    if m:
        return int(m.group(1))
    for patterns, num in _CN_DAY_PATTERNS:
        if any(p.search(text) for p in patterns):
            return num
    m = _ANY_NUMBER.search(text)
    if m:
        return int(m.group(1))
    return None


def parse_story_date(text: str | None) -> StoryDate | None:
    """Parse one date expression. Returns None when nothing date-like is found."""
    if not text:
        return None
    raw = text.strip()
    hint_match = _WEEKDAY_HINT.search(raw)
    hint = hint_match.group(1) if hint_match else None
    clean = _WEEKDAY_HINT_STRIP.sub(" ", raw).strip()

    if _PLACEHOLDER.search(clean):
        return FantasyDate(raw=raw, weekday_hint=hint)

    for recognize in _RECOGNIZERS:
        parsed = recognize(clean)
        if parsed:
            return parsed

    month_id = extract_month_identifier(clean)
    day = extract_day_number(clean)
    if month_id or day is not None:
        return FantasyDate(raw=raw, month_id=month_id, day=day, weekday_hint=hint)
    return None


# ── Day arithmetic ──────────────────────────────────────────


def calendar_date(year: int, month: int, day: int) -> date | None:
    """Build a date, rolling day overflow forward ("2/30" → early March)."""
    if not MINYEAR <= year <= MAXYEAR:
        return None
    try:
        return date(year, month, 1) + timedelta(days=day - 1)
    except OverflowError:
        return None


def _date_only(text: str) -> str:
    return re.split(r"\s+", text)[0].strip()


def _standard_instants(
    start: StandardDate, end: StandardDate
) -> tuple[date | None, date | None]:
    start_year = start.year or end.year or DEFAULT_YEAR
    end_year = end.year or start.year or DEFAULT_YEAR
    return (
        calendar_date(start_year, start.month, start.day),
        calendar_date(end_year, end.month, end.day),
    )


def calculate_relative_time(from_text: str | None, to_text: str | None) -> int | None:
    """Days from `from_text` to `to_text` (to − from), or a sentinel for fantasy dates."""
    if not from_text or not to_text:
        return None
    if _date_only(from_text) == _date_only(to_text):
        return 0

    start = parse_story_date(from_text)
    end = parse_story_date(to_text)
    if not start or not end:
        return None

    if isinstance(start, StandardDate) and isinstance(end, StandardDate):
        start_day, end_day = _standard_instants(start, end)
        if start_day is None or end_day is None:
            return None
        return (end_day - start_day).days

    start_month = start.month_id if isinstance(start, FantasyDate) else start.month
    end_month = end.month_id if isinstance(end, FantasyDate) else end.month
    if start.day is not None and end.day is not None:
        if start_month and end_month and start_month != end_month:
            return AFTER if end.day > start.day else BEFORE
        return end.day - start.day
    return EARLIER


def _js_round(value: float) -> int:
    return math.floor(value + 0.5)


def _weekday_name(d: date) -> str:
    return WEEKDAY_NAMES[(d.weekday() + 1) % 7]


def format_relative_time(
    days: int | None,
    from_date: date | None = None,
    to_date: date | None = None,
) -> str:
    """Human label for a day delta. Positive = `from_date` lies in the past."""
    if days is None:
        return "未知"
    if days == EARLIER:
        return "较早"
    if days == AFTER:
        return "之后"
    if days == BEFORE:
        return "之前"

    near = {0: "今天", 1: "昨天", 2: "前天", 3: "大前天", -1: "明天", -2: "后天", -3: "大后天"}
    if days in near:
        return near[days]

    past = days > 0
    n = abs(days)
    suffix = "前" if past else "后"

    if 4 <= n <= 13 and from_date:
        return f"{'上' if past else '下'}周{_weekday_name(from_date)}"
    if n < 7:
        return f"{n}天{suffix}"
    if 20 <= n < 60 and from_date and to_date and from_date.month != to_date.month:
        return f"{'上' if past else '下'}个月{from_date.day}号"
    if past and 300 <= n < 730 and from_date and to_date and from_date.year < to_date.year:
        return f"去年{from_date.month}月{from_date.day}日"
    if n < 14:
        return f"{math.ceil(n / 7)}周{suffix}"
    if n < 365:
        return f"{max(1, _js_round(n / 30))}个月{suffix}"
    years = n // 365
    remain_months = _js_round((n % 365) / 30)
    if remain_months > 0 and years < 5:
        return f"{years}年{remain_months}个月{suffix}"
    return f"{years}年{suffix}"


@dataclass
class RelativeTime:
    """Day delta between two story dates plus the instants it was computed from."""

    days: int | None
    label: str
    from_date: date | None = None
    to_date: date | None = None


def calculate_detailed_relative_time(from_text: str, to_text: str) -> RelativeTime:
    days = calculate_relative_time(from_text, to_text)
    if days is None:
        return RelativeTime(days=None, label="未知")

    start = parse_story_date(from_text)
    end = parse_story_date(to_text)
    from_date = to_date = None
    if isinstance(start, StandardDate) and isinstance(end, StandardDate):
        from_date, to_date = _standard_instants(start, end)

    return RelativeTime(
        days=days,
        label=format_relative_time(days, from_date, to_date),
        from_date=from_date,
        to_date=to_date,
    )


# ── Display ─────────────────────────────────────────────────


def format_story_date(parsed: StoryDate | None, include_weekday: bool = False) -> str:
    """Render a parsed date. Fantasy dates keep their original text."""
    if parsed is None:
        return ""
    if isinstance(parsed, FantasyDate):
        result = parsed.raw
        if include_weekday and parsed.weekday_hint and f"({parsed.weekday_hint})" not in result:
            result += f" ({parsed.weekday_hint})"
        return result

    if parsed.year:
        if parsed.calendar_prefix:
            text = f"{parsed.calendar_prefix}{parsed.year}年{parsed.month}月{parsed.day}日"
        else:
            text = f"{parsed.year}/{parsed.month}/{parsed.day}"
    else:
        text = f"{parsed.month}/{parsed.day}"

    if include_weekday:
        # Yearless dates borrow the current year, display only
        d = calendar_date(parsed.year or date.today().year, parsed.month, parsed.day)
        if d:
            text += f" ({_weekday_name(d)})"
    return text


def format_full_datetime(date_text: str, time_text: str = "") -> str:
    parsed = parse_story_date(date_text)
    suffix = f" {time_text}" if time_text else ""
    if parsed is None:
        return date_text + suffix
    return format_story_date(parsed, include_weekday=True) + suffix


@dataclass
class TimeReference:
    """Anchor labels the generator can use to resolve "yesterday" and friends."""

    current: str
    type: str
    yesterday: str = ""
    day_before: str = ""
    three_days_ago: str = ""
    tomorrow: str = ""


def generate_time_reference(current_text: str) -> TimeReference | None:
    current = parse_story_date(current_text)
    if current is None:
        return None
    if isinstance(current, FantasyDate):
        return TimeReference(current=current_text, type="fantasy")

    base = calendar_date(current.year or date.today().year, current.month, current.day)
    if base is None:
        return None

    def label(offset: int) -> str:
        d = base + timedelta(days=offset)
        return f"{d.month}/{d.day} ({_weekday_name(d)})"

    return TimeReference(
        current=current_text,
        type="standard",
        yesterday=label(-1),
        day_before=label(-2),
        three_days_ago=label(-3),
        tomorrow=label(1),
    )
