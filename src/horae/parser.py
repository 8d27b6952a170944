"""Annotation parser — turn text → Delta.

Two entry points share the per-field grammars:
- parse_tag(): strict. Reads <horae>…</horae> (or the legacy <!--horae … -->),
  <horaeevent>…</horaeevent> and any <horaetable:名>…</horaetable> blocks.
- parse_loose(): scans unwrapped text for `key:value` markers anywhere.

Malformed lines are dropped silently; nothing here raises on bad input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable

from horae.delta import (
    IMPORTANCE_MARKS,
    AffectionUpdate,
    AgendaItem,
    Delta,
    Description,
    Event,
    Importance,
    ItemUpdate,
    NpcUpdate,
    Scene,
    TableUpdate,
    Timestamp,
    utc_now,
)

# Single-count classifiers: "(1个)" or a bare "(个)" carries no information.
# Container units (箱) and measures (斤, L, kg) are real quantities and stay.
COUNTING_CLASSIFIERS = "个把条块张根口份枚只颗支件套双对碗杯盘盆串束扎"

_TRIVIAL_QUANTITY = [
    re.compile(r"[(（]1[)）]$"),
    re.compile(rf"[(（]1[{COUNTING_CLASSIFIERS}][)）]$"),
    re.compile(rf"[(（][{COUNTING_CLASSIFIERS}][)）]$"),
]
_QUANTITY_SUFFIX = re.compile(r"[(（]\d[\d./]*[a-zA-Z一-鿿]*[)）]$")
_CLASSIFIER_SUFFIX = re.compile(rf"[(（][{COUNTING_CLASSIFIERS}][)）]$")

_ICON = re.compile(
    "^("
    "[\U0001F300-\U0001F9FF☀-⛿✀-➿\U0001F600-\U0001F64F\U0001F680-\U0001F6FF"
    "\U0001F1E0-\U0001F1FF\U0001FA00-\U0001FAFF⌚-⌛⏩-⏳⏸-⏺"
    "▪-▫▶◀◻-◾⤴-⤵⬅-⬇⬛-⬜"
    "⭐⭕〰〽㊗㊙]"
    "️?)"
)

_HORAE_BLOCK = re.compile(r"<horae>(.*?)</horae>", re.IGNORECASE | re.DOTALL)
_HORAE_COMMENT = re.compile(r"<!--horae(.*?)-->", re.IGNORECASE | re.DOTALL)
_EVENT_BLOCK = re.compile(r"<horaeevent>(.*?)</horaeevent>", re.IGNORECASE | re.DOTALL)
_TABLE_BLOCK = re.compile(
    r"<horaetable[:：]\s*([^\n>]+?)>(.*?)</horaetable>", re.IGNORECASE | re.DOTALL
)

_CLOCK = re.compile(r"\b(\d{1,2}:\d{2})\s*$", re.ASCII)
_AFFECTION_ABSOLUTE = re.compile(r"^(.+?)=\s*([+\-]?\d+)")
_AFFECTION_RELATIVE = re.compile(r"^(.+?)([+\-]\d+)")
_CELL = re.compile(r"^(\d+)[,\-](\d+)[:：]\s*(.*)$")
_CELL_SEPARATOR = re.compile(r"\s*[|｜]\s*")
_EMPTY_CELL = re.compile(r"^[(（]?空[)）]?$")
_DASH_CELL = re.compile(r"^[-—]+$")

_NPC_KEYS = [
    ("gender", re.compile(r"^(性别|gender|sex)$", re.IGNORECASE)),
    ("age", re.compile(r"^(年龄|age|年纪)$", re.IGNORECASE)),
    ("race", re.compile(r"^(种族|race|族裔|族群)$", re.IGNORECASE)),
    ("job", re.compile(r"^(职业|job|class|职务|身份)$", re.IGNORECASE)),
    ("note", re.compile(r"^(补充|note|备注|其他)$", re.IGNORECASE)),
]


# ── Quantity markers ────────────────────────────────────────


def strip_trivial_quantity(name: str) -> str:
    """Drop "(1)", "(1个)" and bare "(个)" suffixes. "(5斤)" is kept."""
    name = name.strip()
    for pattern in _TRIVIAL_QUANTITY:
        name = pattern.sub("", name).strip()
    return name


def item_base_name(name: str) -> str:
    """Identity key for an item: the name without any quantity bracket."""
    name = _QUANTITY_SUFFIX.sub("", name)
    name = _CLASSIFIER_SUFFIX.sub("", name)
    return name.strip()


def split_icon(text: str) -> tuple[str | None, str]:
    """Split one leading emoji glyph off `text`."""
    m = _ICON.match(text)
    if not m:
        return None, text
    return m.group(1), text[m.end() :].strip()


# ── Per-field grammars ──────────────────────────────────────


@dataclass
class _Builder:
    """Mutable accumulator; frozen into a Delta once parsing is done."""

    story_date: str | None = None
    story_time: str = ""
    location: str = ""
    atmosphere: str = ""
    characters: list[str] | None = None
    costumes: dict[str, str] = field(default_factory=dict)
    items: dict[str, ItemUpdate] = field(default_factory=dict)
    deleted_items: list[str] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    affection: dict[str, AffectionUpdate] = field(default_factory=dict)
    npcs: dict[str, NpcUpdate] = field(default_factory=dict)
    agenda: list[AgendaItem] = field(default_factory=list)
    deleted_agenda: list[str] = field(default_factory=list)
    tables: list[TableUpdate] = field(default_factory=list)
    now: str = ""

    def build(self) -> Delta:
        timestamp = None
        if self.story_date is not None:
            timestamp = Timestamp(story_date=self.story_date, story_time=self.story_time)
        scene = None
        if self.location or self.atmosphere or self.characters is not None:
            scene = Scene(
                location=self.location,
                atmosphere=self.atmosphere,
                characters_present=tuple(self.characters or ()),
            )
        return Delta(
            timestamp=timestamp,
            scene=scene,
            costumes=self.costumes,
            items=self.items,
            deleted_items=tuple(self.deleted_items),
            events=tuple(self.events),
            affection=self.affection,
            npcs=self.npcs,
            agenda=tuple(self.agenda),
            deleted_agenda=tuple(self.deleted_agenda),
            table_updates=tuple(self.tables),
        )


def _parse_time(b: _Builder, value: str) -> bool:
    m = _CLOCK.search(value)
    if m:
        b.story_time = m.group(1)
        b.story_date = value[: value.rfind(m.group(1))].strip()
    else:
        b.story_date = value
        b.story_time = ""
    return True


def _parse_location(b: _Builder, value: str) -> bool:
    b.location = value
    return True


def _parse_atmosphere(b: _Builder, value: str) -> bool:
    b.atmosphere = value
    return True


def _parse_characters(b: _Builder, value: str) -> bool:
    b.characters = [c.strip() for c in re.split(r"[,，]", value) if c.strip()]
    return True


def _parse_costume(b: _Builder, value: str) -> bool:
    eq = value.find("=")
    if eq <= 0:
        return False
    b.costumes[value[:eq].strip()] = value[eq + 1 :].strip()
    return True


def _parse_item_delete(b: _Builder, value: str) -> bool:
    _, name = split_icon(value)
    name = name.strip()
    if not name:
        return False
    b.deleted_items.append(name)
    return True


def _item_parser(importance: Importance) -> Callable[[_Builder, str], bool]:
    def parse(b: _Builder, value: str) -> bool:
        eq = value.find("=")
        if eq <= 0:
            return False
        name_part = value[:eq].strip()
        rest = value[eq + 1 :].strip()

        icon, name_part = split_icon(name_part)
        description = Description.unset()
        pipe = name_part.find("|")
        if pipe > 0:
            description = Description.of(name_part[pipe + 1 :])
            name_part = name_part[:pipe]
        name = strip_trivial_quantity(name_part)
        if not name:
            return False

        at = rest.find("@")
        if at >= 0:
            holder = rest[:at].strip() or None
            location = rest[at + 1 :].strip()
        else:
            holder = rest or None
            location = ""

        b.items[name] = ItemUpdate(
            icon=icon,
            importance=importance,
            holder=holder,
            location=location,
            description=description,
        )
        return True

    return parse


def _parse_event(b: _Builder, value: str) -> bool:
    parts = value.split("|")
    if len(parts) < 2:
        return False
    level_raw = parts[0].strip()
    summary = "|".join(parts[1:]).strip()
    if not level_raw or not summary:
        return False
    if level_raw == "关键" or level_raw.lower() == "critical":
        level = "关键"
    elif level_raw == "重要" or level_raw.lower() == "important":
        level = "重要"
    else:
        level = "一般"
    b.events.append(Event(level=level, summary=summary))
    return True


def _parse_affection(b: _Builder, value: str) -> bool:
    # Anything after the number ("汤姆=18(+0)|备注") is ignored
    m = _AFFECTION_ABSOLUTE.match(value)
    if m and m.group(1).strip():
        b.affection[m.group(1).strip()] = AffectionUpdate("absolute", int(m.group(2)))
        return True
    m = _AFFECTION_RELATIVE.match(value)
    if m and m.group(1).strip():
        b.affection[m.group(1).strip()] = AffectionUpdate("relative", m.group(2))
        return True
    return False


def parse_npc_fields(text: str) -> tuple[str, dict[str, str]]:
    """Split `名|外貌=性格@关系~性别:男~年龄:25` into (name, fields)."""
    fields: dict[str, str] = {}
    segments = text.split("~")
    main = segments[0].strip()

    for segment in segments[1:]:
        kv = segment.strip()
        colon = kv.find(":")
        if colon <= 0:
            continue
        key = kv[:colon].strip()
        value = kv[colon + 1 :].strip()
        if not value:
            continue
        for field_name, pattern in _NPC_KEYS:
            if pattern.match(key):
                fields[field_name] = value
                break

    pipe = main.find("|")
    if pipe <= 0:
        return main, fields

    name = main[:pipe].strip()
    desc = main[pipe + 1 :].strip()
    if "=" in desc or "@" in desc:
        at = desc.find("@")
        before_at = desc[:at] if at >= 0 else desc
        relationship = desc[at + 1 :].strip() if at >= 0 else ""
        eq = before_at.find("=")
        appearance = before_at[:eq].strip() if eq >= 0 else before_at.strip()
        personality = before_at[eq + 1 :].strip() if eq >= 0 else ""
    else:
        parts = [p.strip() for p in desc.split("|")]
        parts += [""] * (3 - len(parts))
        appearance, personality, relationship = parts[0], parts[1], parts[2]

    if appearance:
        fields["appearance"] = appearance
    if personality:
        fields["personality"] = personality
    if relationship:
        fields["relationship"] = relationship
    return name, fields


def _parse_npc(b: _Builder, value: str) -> bool:
    name, fields = parse_npc_fields(value)
    if not name:
        return False
    first_seen = b.npcs[name].first_seen if name in b.npcs else b.now
    b.npcs[name] = NpcUpdate(**fields, first_seen=first_seen, last_seen=b.now)
    return True


def _parse_agenda_done(b: _Builder, value: str) -> bool:
    pipe = value.find("|")
    text = value[pipe + 1 :].strip() if pipe > 0 else value
    if not text:
        return False
    b.deleted_agenda.append(text)
    return True


def _parse_agenda(b: _Builder, value: str) -> bool:
    if not value:
        return False
    pipe = value.find("|")
    if pipe > 0:
        text = value[pipe + 1 :].strip()
        if not text:
            return False
        b.agenda.append(AgendaItem(date=value[:pipe].strip(), text=text))
    else:
        b.agenda.append(AgendaItem(date="", text=value))
    return True


# Order matters: longer prefixes sharing a stem come first
_LINE_FIELDS: list[tuple[str, Callable[[_Builder, str], bool]]] = [
    ("time", _parse_time),
    ("location", _parse_location),
    ("atmosphere", _parse_atmosphere),
    ("characters", _parse_characters),
    ("costume", _parse_costume),
    ("item-", _parse_item_delete),
    ("item!!", _item_parser("critical")),
    ("item!", _item_parser("important")),
    ("item", _item_parser("none")),
    ("event", _parse_event),
    ("affection", _parse_affection),
    ("npc", _parse_npc),
    ("agenda-", _parse_agenda_done),
    ("agenda", _parse_agenda),
]


def parse_table_cells(text: str) -> dict[str, str]:
    """Parse `row,col:content` cells; several per line when `|`-separated."""
    cells: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        for segment in _CELL_SEPARATOR.split(line):
            m = _CELL.match(segment.strip())
            if not m:
                continue
            value = m.group(3).strip()
            if not value or _EMPTY_CELL.match(value) or _DASH_CELL.match(value):
                continue
            cells[f"{int(m.group(1))}-{int(m.group(2))}"] = value
    return cells


def _parse_tables(b: _Builder, text: str) -> bool:
    found = False
    for m in _TABLE_BLOCK.finditer(text):
        cells = parse_table_cells(m.group(2).strip())
        if cells:
            b.tables.append(TableUpdate(name=m.group(1).strip(), cells=cells))
            found = True
    return found


# ── Entry points ────────────────────────────────────────────


def parse_tag(text: str | None, now: str | None = None) -> Delta | None:
    """Strict parse. None when the text has no annotation block at all."""
    if not text:
        return None
    block = _HORAE_BLOCK.search(text) or _HORAE_COMMENT.search(text)
    event_block = _EVENT_BLOCK.search(text)
    has_tables = _TABLE_BLOCK.search(text) is not None
    if not block and not event_block and not has_tables:
        return None

    b = _Builder(now=now or utc_now())
    lines = (block.group(1).strip() if block else "").split("\n")
    lines += (event_block.group(1).strip() if event_block else "").split("\n")

    for line in lines:
        line = line.strip()
        if not line:
            continue
        for key, handler in _LINE_FIELDS:
            prefix = key + ":"
            if line.startswith(prefix):
                handler(b, line[len(prefix) :].strip())
                break

    _parse_tables(b, text)
    return b.build()


_LOOSE_PATTERNS = [
    (re.compile(rf"{re.escape(key)}[:：]\s*(.+)", re.IGNORECASE), handler)
    for key, handler in _LINE_FIELDS
]


def parse_loose(text: str | None, now: str | None = None) -> Delta | None:
    """Scan unwrapped text for field markers. None when nothing matched."""
    if not text:
        return None
    b = _Builder(now=now or utc_now())
    matched = False
    for pattern, handler in _LOOSE_PATTERNS:
        for m in pattern.finditer(text):
            if handler(b, m.group(1).strip()):
                matched = True
    if _parse_tables(b, text):
        matched = True
    return b.build() if matched else None


def strip_annotations(text: str) -> str:
    """Remove annotation blocks, leaving the narrative prose."""
    for pattern in (_HORAE_BLOCK, _HORAE_COMMENT, _EVENT_BLOCK, _TABLE_BLOCK):
        text = pattern.sub("", text)
    return text.strip()


# ── Rendering ───────────────────────────────────────────────


def render_delta(delta: Delta) -> str:
    """Render a Delta back into <horae> / <horaeevent> blocks."""
    lines: list[str] = []
    ts = delta.timestamp
    if ts and ts.story_date:
        lines.append(f"time:{ts.story_date} {ts.story_time}".rstrip())
    if delta.scene:
        if delta.scene.location:
            lines.append(f"location:{delta.scene.location}")
        if delta.scene.atmosphere:
            lines.append(f"atmosphere:{delta.scene.atmosphere}")
        if delta.scene.characters_present:
            lines.append(f"characters:{','.join(delta.scene.characters_present)}")
    for char, costume in delta.costumes.items():
        if char and costume:
            lines.append(f"costume:{char}={costume}")
    for name, info in delta.items.items():
        desc = f"|{info.description.text}" if info.description.is_value else ""
        loc = f"@{info.location}" if info.location else ""
        lines.append(
            f"item{IMPORTANCE_MARKS[info.importance]}:{info.icon or ''}{name}{desc}"
            f"={info.holder or ''}{loc}"
        )
    for name in delta.deleted_items:
        lines.append(f"item-:{name}")
    for name, aff in delta.affection.items():
        sep = "" if aff.kind == "relative" else "="
        lines.append(f"affection:{name}{sep}{aff.value}")
    for name, npc in delta.npcs.items():
        line = f"npc:{name}"
        if npc.appearance or npc.personality or npc.relationship:
            line += f"|{npc.appearance or ''}={npc.personality or ''}@{npc.relationship or ''}"
        extras = [
            f"{label}:{value}"
            for label, value in (
                ("性别", npc.gender),
                ("年龄", npc.age),
                ("种族", npc.race),
                ("职业", npc.job),
                ("补充", npc.note),
            )
            if value
        ]
        if extras:
            line += "~" + "~".join(extras)
        lines.append(line)
    for item in delta.agenda:
        date = f"{item.date}|" if item.date else ""
        lines.append(f"agenda:{date}{item.text}")
    for text in delta.deleted_agenda:
        lines.append(f"agenda-:{text}")

    blocks = []
    if lines:
        blocks.append("<horae>\n" + "\n".join(lines) + "\n</horae>")
    if delta.events:
        events = "\n".join(f"event:{e.level}|{e.summary}" for e in delta.events)
        blocks.append(f"<horaeevent>\n{events}\n</horaeevent>")
    return "\n".join(blocks)
