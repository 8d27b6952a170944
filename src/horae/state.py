"""State aggregator — fold stored per-turn Deltas into one world State.

The fold is a pure function of the turn ledger: nothing is cached between
calls, so re-running it over the same turns always yields the same State.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Callable, Protocol, Sequence

from horae.delta import (
    IMPORTANCE_RANK,
    AgendaItem,
    Delta,
    Event,
    Importance,
    ItemUpdate,
    NpcUpdate,
    Timestamp,
    utc_now,
)
from horae.parser import item_base_name, strip_trivial_quantity
from horae.temporal import StandardDate, parse_story_date

logger = logging.getLogger(__name__)

_ZERO_QUANTITY = re.compile(r"[(（]0[a-zA-Z一-鿿]*[)）]$")
_CONSUMED_MARK = re.compile(r"[(（](已消耗|已用完|已销毁|消耗殆尽|消耗|用尽)[)）]")
_CONSUMED_HOLDER = re.compile(r"^(消耗|已消耗|已用完|消耗殆尽|用尽|无)$")
_LEADING_INT = re.compile(r"^\s*([+\-]?\d+)")

_UPDATABLE_NPC_FIELDS = ("appearance", "personality", "relationship", "age", "job", "note")
_PROTECTED_NPC_FIELDS = ("gender", "race")


class TurnLike(Protocol):
    """What the fold needs from a host turn."""

    text: str
    is_user: bool
    delta: Delta | None


# ── Records ─────────────────────────────────────────────────


@dataclass
class ItemRecord:
    icon: str | None = None
    importance: Importance = "none"
    holder: str | None = None
    location: str = ""
    description: str = ""
    item_id: str | None = None
    # (turn index, Delta key) of the update that created the record
    origin: tuple[int, str] | None = field(default=None, compare=False, repr=False)


@dataclass
class NpcRecord:
    appearance: str = ""
    personality: str = ""
    relationship: str = ""
    gender: str = ""
    age: str = ""
    race: str = ""
    job: str = ""
    note: str = ""
    age_ref_date: str = ""
    first_seen: str = ""
    last_seen: str = ""
    npc_id: str | None = None
    origin: tuple[int, str] | None = field(default=None, compare=False, repr=False)


@dataclass
class State:
    """Cumulative world state at a cursor."""

    story_date: str = ""
    story_time: str = ""
    location: str = ""
    atmosphere: str = ""
    characters_present: list[str] = field(default_factory=list)
    costumes: dict[str, str] = field(default_factory=dict)
    items: dict[str, ItemRecord] = field(default_factory=dict)
    npcs: dict[str, NpcRecord] = field(default_factory=dict)
    affection: dict[str, int] = field(default_factory=dict)
    agenda: list[AgendaItem] = field(default_factory=list)

    def find_item_by_id(self, item_id: str) -> tuple[str, ItemRecord] | None:
        """Look up an item by "#7", "007" or "7"."""
        normalized = item_id.strip().lstrip("#").strip()
        padded = pad_id(int(normalized)) if normalized.isdigit() else None
        for name, record in self.items.items():
            if record.item_id in (normalized, padded):
                return name, record
        return None


def pad_id(number: int) -> str:
    return str(number).zfill(3)


def _parse_int(value: object) -> int | None:
    """Leading integer of `value`, like "25岁" → 25. None if there is none."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    m = _LEADING_INT.match(str(value or ""))
    return int(m.group(1)) if m else None


# ── Items ───────────────────────────────────────────────────


def _delete_by_base(items: dict[str, ItemRecord], base: str, reason: str) -> None:
    base = base.lower()
    for name in list(items):
        if item_base_name(name).lower() == base:
            del items[name]
            logger.debug("物品%s自动删除: %s", reason, name)


def _find_existing(items: dict[str, ItemRecord], name: str) -> str | None:
    if name in items:
        return name
    base = item_base_name(name)
    for existing in items:
        if item_base_name(existing) == base:
            return existing
    return None


def _apply_item(
    items: dict[str, ItemRecord],
    raw_name: str,
    update: ItemUpdate,
    origin: tuple[int, str] | None = None,
) -> None:
    name = strip_trivial_quantity(raw_name)

    if _ZERO_QUANTITY.search(name):
        _delete_by_base(items, item_base_name(name), "数量归零")
        return

    if _CONSUMED_MARK.search(name) or _CONSUMED_HOLDER.match(update.holder or ""):
        clean = _CONSUMED_MARK.sub("", name).strip()
        _delete_by_base(items, item_base_name(clean or name), "已消耗")
        return

    existing_key = _find_existing(items, name)
    if existing_key is None:
        items[name] = ItemRecord(
            icon=update.icon,
            importance=update.importance,
            holder=update.holder,
            location=update.location,
            description=update.description.text if update.description.is_value else "",
            item_id=update.item_id,
            origin=origin,
        )
        return

    old = items[existing_key]
    importance = old.importance
    if IMPORTANCE_RANK[update.importance] > IMPORTANCE_RANK[importance]:
        importance = update.importance
    merged = replace(
        old,
        icon=update.icon or old.icon,
        importance=importance,
        holder=update.holder,
        location=update.location,
        description=update.description.text if update.description.is_value else old.description,
    )
    if existing_key != name:
        # Re-keyed records go to the end, like a fresh insert
        del items[existing_key]
        logger.debug("物品数量更新: %s → %s", existing_key, name)
    items[name] = merged


def _apply_deleted_items(items: dict[str, ItemRecord], names: Sequence[str]) -> None:
    for deleted in names:
        target = deleted.lower()
        target_base = item_base_name(deleted).lower()
        for name in list(items):
            if name.lower() == target or item_base_name(name).lower() == target_base:
                del items[name]
                logger.debug("物品已删除: %s", name)


# ── NPCs ────────────────────────────────────────────────────


def _apply_npc(
    state: State,
    name: str,
    update: NpcUpdate,
    now: str,
    origin: tuple[int, str] | None = None,
) -> None:
    existing = state.npcs.get(name)
    if existing is None:
        state.npcs[name] = NpcRecord(
            appearance=update.appearance or "",
            personality=update.personality or "",
            relationship=update.relationship or "",
            gender=update.gender or "",
            age=update.age or "",
            race=update.race or "",
            job=update.job or "",
            note=update.note or "",
            age_ref_date=state.story_date if update.age else "",
            first_seen=update.first_seen or now,
            last_seen=update.last_seen or now,
            npc_id=update.npc_id,
            origin=origin,
        )
        return

    if update.age:
        old_age = _parse_int(existing.age)
        new_age = _parse_int(update.age)
        if not existing.age_ref_date or (
            old_age is not None and new_age is not None and old_age != new_age
        ):
            existing.age_ref_date = state.story_date

    for attr in _UPDATABLE_NPC_FIELDS:
        value = getattr(update, attr)
        if value is not None:
            setattr(existing, attr, value)
    for attr in _PROTECTED_NPC_FIELDS:
        value = getattr(update, attr)
        if value is not None and not getattr(existing, attr):
            setattr(existing, attr, value)
    if update.last_seen:
        existing.last_seen = update.last_seen


def _assign_ids(records: Sequence[ItemRecord] | Sequence[NpcRecord], attr: str) -> None:
    top = 0
    for record in records:
        number = _parse_int(getattr(record, attr))
        if number is not None and number > top:
            top = number
    for record in records:
        if not getattr(record, attr):
            top += 1
            setattr(record, attr, pad_id(top))


# ── Fold ────────────────────────────────────────────────────


def apply_delta(state: State, delta: Delta, now: str, turn_index: int | None = None) -> None:
    """Fold one Delta into `state` in place.

    `turn_index` tags new item and NPC records with the turn that created
    them, which is where `persist_ids` writes their ids back.
    """
    ts = delta.timestamp
    if ts:
        if ts.story_date:
            state.story_date = ts.story_date
        if ts.story_time:
            state.story_time = ts.story_time

    scene = delta.scene
    if scene:
        if scene.location:
            state.location = scene.location
        if scene.atmosphere:
            state.atmosphere = scene.atmosphere
        if scene.characters_present:
            state.characters_present = list(scene.characters_present)

    state.costumes.update(delta.costumes)

    for name, update in delta.items.items():
        origin = (turn_index, name) if turn_index is not None else None
        _apply_item(state.items, name, update, origin)
    _apply_deleted_items(state.items, delta.deleted_items)

    for name, aff in delta.affection.items():
        if aff.kind == "absolute":
            state.affection[name] = _parse_int(aff.value) or 0
        else:
            state.affection[name] = state.affection.get(name, 0) + (_parse_int(aff.value) or 0)

    for name, npc in delta.npcs.items():
        origin = (turn_index, name) if turn_index is not None else None
        _apply_npc(state, name, npc, now, origin)

    seen: set[str] = set()
    for item in delta.agenda:
        if item.text not in seen:
            seen.add(item.text)
            state.agenda.append(item)


def compute_state(
    turns: Sequence[TurnLike],
    skip_last: int = 0,
    clock: Callable[[], str] = utc_now,
) -> State:
    """Fold every stored Delta before the cursor `len(turns) - skip_last`."""
    state = State()
    end = max(0, len(turns) - skip_last)
    now = clock()
    for i, turn in enumerate(turns[:end]):
        if turn.delta is not None:
            apply_delta(state, turn.delta, now, turn_index=i)

    _assign_ids(list(state.items.values()), "item_id")
    _assign_ids(list(state.npcs.values()), "npc_id")
    return state


def _ids_by_origin(
    records: Sequence[ItemRecord] | Sequence[NpcRecord], attr: str
) -> dict[int, dict[str, str]]:
    found: dict[int, dict[str, str]] = {}
    for record in records:
        new_id = getattr(record, attr)
        if record.origin is not None and new_id:
            index, key = record.origin
            found.setdefault(index, {})[key] = new_id
    return found


def _with_ids(updates: dict, ids: dict[str, str], attr: str) -> dict:
    changed = {
        key: replace(update, **{attr: ids[key]})
        for key, update in updates.items()
        if key in ids and getattr(update, attr) != ids[key]
    }
    return {**updates, **changed} if changed else updates


def persist_ids(turns: Sequence[TurnLike], state: State) -> int:
    """Store allocated ids in the Delta of the turn that created each record.

    Once written, an id survives later folds even when earlier records are
    deleted. Returns the number of turns whose Delta was rewritten.
    """
    item_ids = _ids_by_origin(list(state.items.values()), "item_id")
    npc_ids = _ids_by_origin(list(state.npcs.values()), "npc_id")

    rewritten = 0
    for index in sorted(set(item_ids) | set(npc_ids)):
        delta = turns[index].delta
        if delta is None:
            continue
        items = _with_ids(delta.items, item_ids.get(index, {}), "item_id")
        npcs = _with_ids(delta.npcs, npc_ids.get(index, {}), "npc_id")
        if items is not delta.items or npcs is not delta.npcs:
            turns[index].delta = replace(delta, items=items, npcs=npcs)
            rewritten += 1
    if rewritten:
        logger.debug("ID已写回 %d 条消息", rewritten)
    return rewritten


# ── Age projection ──────────────────────────────────────────


@dataclass
class AgeProjection:
    display: str
    original: str
    changed: bool = False


def calc_current_age(npc: NpcRecord, current_date: str) -> AgeProjection:
    """Project an NPC's age forward from the date it was last asserted."""
    original = npc.age or ""
    unchanged = AgeProjection(display=original, original=original)
    if not original or not npc.age_ref_date or not current_date:
        return unchanged
    age = _parse_int(original)
    if age is None:
        return unchanged

    ref = parse_story_date(npc.age_ref_date)
    cur = parse_story_date(current_date)
    if not isinstance(ref, StandardDate) or not isinstance(cur, StandardDate):
        return unchanged
    if ref.year is None or cur.year is None:
        return unchanged

    years = cur.year - ref.year
    if (cur.month, cur.day) < (ref.month, ref.day):
        years -= 1
    if years <= 0:
        return unchanged
    return AgeProjection(display=str(age + years), original=original, changed=True)


# ── Events ──────────────────────────────────────────────────


@dataclass
class EventEntry:
    turn_index: int
    event_index: int
    timestamp: Timestamp | None
    event: Event


def collect_events(
    turns: Sequence[TurnLike],
    limit: int = 0,
    level: str = "all",
    skip_last: int = 0,
) -> list[EventEntry]:
    """Events in turn order. limit=0 means no cap."""
    entries: list[EventEntry] = []
    end = max(0, len(turns) - skip_last)
    for i, turn in enumerate(turns[:end]):
        if turn.delta is None:
            continue
        for j, event in enumerate(turn.delta.events):
            if not event.summary or (level != "all" and event.level != level):
                continue
            entries.append(EventEntry(i, j, turn.delta.timestamp, event))
            if limit > 0 and len(entries) >= limit:
                return entries
    return entries


# ── Agenda ──────────────────────────────────────────────────


def _agenda_matches(text: str, target: str) -> bool:
    """Exact match, or either text contains the other (shortened or expanded wording)."""
    if not text or not target:
        return False
    return text == target or target in text or text in target


def remove_completed_agenda(turns: Sequence[TurnLike], targets: Sequence[str]) -> int:
    """Drop matching agenda items from every turn's stored Delta. Returns the count removed."""
    if not targets:
        return 0
    removed = 0
    for turn in turns:
        delta = turn.delta
        if delta is None or not delta.agenda:
            continue
        kept = tuple(
            a for a in delta.agenda if not any(_agenda_matches(a.text, t) for t in targets)
        )
        if len(kept) != len(delta.agenda):
            removed += len(delta.agenda) - len(kept)
            turn.delta = replace(delta, agenda=kept)
    return removed


def active_agenda(state: State) -> list[AgendaItem]:
    """Distinct agenda texts in turn order, without finished items."""
    seen: set[str] = set()
    active = []
    for item in state.agenda:
        if item.text in seen:
            continue
        seen.add(item.text)
        if not item.done:
            active.append(item)
    return active
