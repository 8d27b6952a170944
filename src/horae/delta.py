"""Delta — one turn's parsed annotation, as stored in the host's per-turn slot.

A Delta is a frozen value. Code that needs a different Delta (re-annotation,
agenda completion) builds a new one with `dataclasses.replace` or `merge_delta`.

Storage shape (`to_dict`) mirrors the annotation fields one-to-one so a host
can keep it as JSON/YAML next to the turn text.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal

Importance = Literal["none", "important", "critical"]
IMPORTANCE_RANK: dict[str, int] = {"none": 0, "important": 1, "critical": 2}
IMPORTANCE_MARKS: dict[str, str] = {"none": "", "important": "!", "critical": "!!"}

EVENT_LEVELS = ("一般", "重要", "关键")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class Description:
    """Item description tri-state: unset (don't touch), clear, or a value."""

    kind: Literal["unset", "clear", "value"] = "unset"
    text: str = ""

    @classmethod
    def unset(cls) -> Description:
        return cls("unset")

    @classmethod
    def clear(cls) -> Description:
        return cls("clear")

    @classmethod
    def of(cls, text: str | None) -> Description:
        if text is None:
            return cls.unset()
        text = text.strip()
        return cls("value", text) if text else cls.clear()

    @property
    def is_value(self) -> bool:
        return self.kind == "value"


@dataclass(frozen=True)
class Timestamp:
    story_date: str = ""
    story_time: str = ""
    absolute: str = ""


@dataclass(frozen=True)
class Scene:
    location: str = ""
    atmosphere: str = ""
    characters_present: tuple[str, ...] = ()


@dataclass(frozen=True)
class ItemUpdate:
    """An item upsert. `holder=None` means nobody holds it."""

    icon: str | None = None
    importance: Importance = "none"
    holder: str | None = None
    location: str = ""
    description: Description = field(default_factory=Description.unset)
    item_id: str | None = None


@dataclass(frozen=True)
class Event:
    level: str
    summary: str

    @property
    def is_important(self) -> bool:
        return self.level in ("重要", "关键")


@dataclass(frozen=True)
class AffectionUpdate:
    """absolute: replace the score; relative: add a signed delta like "+5"."""

    kind: Literal["absolute", "relative"]
    value: int | str


@dataclass(frozen=True)
class NpcUpdate:
    """Partial NPC dossier. None means the field was not supplied."""

    appearance: str | None = None
    personality: str | None = None
    relationship: str | None = None
    gender: str | None = None
    age: str | None = None
    race: str | None = None
    job: str | None = None
    note: str | None = None
    first_seen: str | None = None
    last_seen: str | None = None
    npc_id: str | None = None


@dataclass(frozen=True)
class AgendaItem:
    date: str
    text: str
    source: str = "ai"
    done: bool = False


@dataclass(frozen=True)
class TableUpdate:
    """Cell writes for one named table, keyed "row-col"."""

    name: str
    cells: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Delta:
    timestamp: Timestamp | None = None
    scene: Scene | None = None
    costumes: dict[str, str] = field(default_factory=dict)
    items: dict[str, ItemUpdate] = field(default_factory=dict)
    deleted_items: tuple[str, ...] = ()
    events: tuple[Event, ...] = ()
    affection: dict[str, AffectionUpdate] = field(default_factory=dict)
    npcs: dict[str, NpcUpdate] = field(default_factory=dict)
    agenda: tuple[AgendaItem, ...] = ()
    deleted_agenda: tuple[str, ...] = ()
    table_updates: tuple[TableUpdate, ...] = ()

    def is_empty(self) -> bool:
        return not (
            (self.timestamp and (self.timestamp.story_date or self.timestamp.story_time))
            or (
                self.scene
                and (self.scene.location or self.scene.atmosphere or self.scene.characters_present)
            )
            or self.costumes
            or self.items
            or self.deleted_items
            or self.events
            or self.affection
            or self.npcs
            or self.agenda
            or self.deleted_agenda
            or self.table_updates
        )

    def has_annotation(self) -> bool:
        """True when the turn already carries a date, events or costumes."""
        return bool(
            (self.timestamp and self.timestamp.story_date) or self.events or self.costumes
        )

    # ── Storage shape ─────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.timestamp:
            data["timestamp"] = {
                "story_date": self.timestamp.story_date,
                "story_time": self.timestamp.story_time,
                "absolute": self.timestamp.absolute,
            }
        if self.scene:
            data["scene"] = {
                "location": self.scene.location,
                "atmosphere": self.scene.atmosphere,
                "characters_present": list(self.scene.characters_present),
            }
        if self.costumes:
            data["costumes"] = dict(self.costumes)
        if self.items:
            data["items"] = {name: _item_to_dict(info) for name, info in self.items.items()}
        if self.deleted_items:
            data["deleted_items"] = list(self.deleted_items)
        if self.events:
            data["events"] = [{"level": e.level, "summary": e.summary} for e in self.events]
        if self.affection:
            data["affection"] = {
                name: {"type": a.kind, "value": a.value} for name, a in self.affection.items()
            }
        if self.npcs:
            data["npcs"] = {
                name: {k: v for k, v in _npc_fields(npc).items() if v is not None}
                for name, npc in self.npcs.items()
            }
        if self.agenda:
            data["agenda"] = [
                {"date": a.date, "text": a.text, "source": a.source, "done": a.done}
                for a in self.agenda
            ]
        if self.deleted_agenda:
            data["deleted_agenda"] = list(self.deleted_agenda)
        if self.table_updates:
            data["table_contributions"] = [
                {"name": t.name, "updates": dict(t.cells)} for t in self.table_updates
            ]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Delta:
        """Build a Delta from its storage shape. Unknown or malformed parts are dropped."""
        if not data:
            return cls()

        ts = data.get("timestamp") or {}
        scene = data.get("scene") or {}
        timestamp = (
            Timestamp(
                story_date=str(ts.get("story_date") or ""),
                story_time=str(ts.get("story_time") or ""),
                absolute=str(ts.get("absolute") or ""),
            )
            if ts
            else None
        )
        scene_value = (
            Scene(
                location=str(scene.get("location") or ""),
                atmosphere=str(scene.get("atmosphere") or ""),
                characters_present=tuple(scene.get("characters_present") or ()),
            )
            if scene
            else None
        )

        events = []
        # Older storage keeps a single "event"
        raw_events = data.get("events") or ([data["event"]] if data.get("event") else [])
        for e in raw_events:
            if isinstance(e, dict) and e.get("summary"):
                events.append(Event(level=e.get("level") or "一般", summary=e["summary"]))

        affection = {}
        for name, value in (data.get("affection") or {}).items():
            if isinstance(value, dict):
                kind = "absolute" if value.get("type") == "absolute" else "relative"
                affection[name] = AffectionUpdate(kind=kind, value=value.get("value", 0))
            else:
                affection[name] = AffectionUpdate(kind="relative", value=value)

        npcs = {}
        for name, npc in (data.get("npcs") or {}).items():
            if not isinstance(npc, dict):
                continue
            npcs[name] = NpcUpdate(
                appearance=npc.get("appearance"),
                personality=npc.get("personality"),
                relationship=npc.get("relationship"),
                gender=npc.get("gender"),
                age=None if npc.get("age") is None else str(npc["age"]),
                race=npc.get("race"),
                job=npc.get("job"),
                note=npc.get("note"),
                first_seen=npc.get("first_seen"),
                last_seen=npc.get("last_seen"),
                npc_id=npc.get("id"),
            )

        agenda = tuple(
            AgendaItem(
                date=a.get("date") or "",
                text=a["text"],
                source=a.get("source") or "ai",
                done=bool(a.get("done")),
            )
            for a in data.get("agenda") or ()
            if isinstance(a, dict) and a.get("text")
        )

        tables = tuple(
            TableUpdate(name=t.get("name") or "", cells=dict(t.get("updates") or {}))
            for t in data.get("table_contributions") or ()
            if isinstance(t, dict)
        )

        return cls(
            timestamp=timestamp,
            scene=scene_value,
            costumes=dict(data.get("costumes") or {}),
            items={
                name: _item_from_dict(info)
                for name, info in (data.get("items") or {}).items()
                if isinstance(info, dict)
            },
            deleted_items=tuple(data.get("deleted_items") or ()),
            events=tuple(events),
            affection=affection,
            npcs=npcs,
            agenda=agenda,
            deleted_agenda=tuple(data.get("deleted_agenda") or ()),
            table_updates=tables,
        )


def _npc_fields(npc: NpcUpdate) -> dict[str, str | None]:
    return {
        "appearance": npc.appearance,
        "personality": npc.personality,
        "relationship": npc.relationship,
        "gender": npc.gender,
        "age": npc.age,
        "race": npc.race,
        "job": npc.job,
        "note": npc.note,
        "first_seen": npc.first_seen,
        "last_seen": npc.last_seen,
        "id": npc.npc_id,
    }


def _item_to_dict(info: ItemUpdate) -> dict[str, Any]:
    data: dict[str, Any] = {
        "icon": info.icon,
        "importance": info.importance,
        "holder": info.holder,
        "location": info.location,
    }
    if info.description.kind != "unset":
        data["description"] = info.description.text
    if info.item_id:
        data["id"] = info.item_id
    return data


def _item_from_dict(data: dict[str, Any]) -> ItemUpdate:
    importance = data.get("importance") or "none"
    # Marker form ("!", "!!") is accepted for hand-written data
    importance = {"": "none", "!": "important", "!!": "critical"}.get(importance, importance)
    if importance not in IMPORTANCE_RANK:
        importance = "none"
    return ItemUpdate(
        icon=data.get("icon") or None,
        importance=importance,
        holder=data.get("holder"),
        location=data.get("location") or "",
        description=Description.of(data["description"]) if "description" in data else Description.unset(),
        item_id=data.get("id"),
    )


# ── Re-annotation ───────────────────────────────────────────


def _keep_ids(old: dict, new: dict, attr: str) -> dict:
    """Carry stored ids over to re-annotated entries that have none."""
    return {
        key: replace(update, **{attr: getattr(old[key], attr)})
        if key in old and not getattr(update, attr) and getattr(old[key], attr)
        else update
        for key, update in new.items()
    }


def merge_delta(base: Delta | None, parsed: Delta, now: str | None = None) -> Delta:
    """Overlay a fresh parse onto the Delta already stored for the same turn."""
    base = base or Delta()
    old_ts = base.timestamp or Timestamp()
    new_ts = parsed.timestamp or Timestamp()
    timestamp = Timestamp(
        story_date=new_ts.story_date or old_ts.story_date,
        story_time=new_ts.story_time or old_ts.story_time,
        absolute=now or utc_now(),
    )

    old_scene = base.scene or Scene()
    new_scene = parsed.scene or Scene()
    scene = Scene(
        location=new_scene.location or old_scene.location,
        atmosphere=new_scene.atmosphere or old_scene.atmosphere,
        characters_present=new_scene.characters_present or old_scene.characters_present,
    )

    deleted = list(base.deleted_items)
    for name in parsed.deleted_items:
        if name not in deleted:
            deleted.append(name)

    agenda = list(base.agenda)
    for item in parsed.agenda:
        if not any(a.text == item.text for a in agenda):
            agenda.append(item)

    return replace(
        base,
        timestamp=timestamp,
        scene=scene,
        costumes={**base.costumes, **parsed.costumes},
        items={**base.items, **_keep_ids(base.items, parsed.items, "item_id")},
        deleted_items=tuple(deleted),
        events=parsed.events or base.events,
        affection={**base.affection, **parsed.affection},
        npcs={**base.npcs, **_keep_ids(base.npcs, parsed.npcs, "npc_id")},
        agenda=tuple(agenda),
        deleted_agenda=parsed.deleted_agenda,
        table_updates=parsed.table_updates or base.table_updates,
    )
