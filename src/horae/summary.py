"""Compact state summary, re-injected into the next generation prompt."""

from __future__ import annotations

from typing import Sequence

from horae.config import SummaryConfig
from horae.state import EventEntry, State, active_agenda, calc_current_age
from horae.tables import Table
from horae.temporal import (
    AFTER,
    BEFORE,
    EARLIER,
    calculate_detailed_relative_time,
    format_full_datetime,
    generate_time_reference,
)

HEADER = "[当前状态快照——对比本回合剧情，仅在<horae>中输出发生实质变化的字段]"

_IMPORTANCE_TAGS = {"none": "", "important": "[重要]", "critical": "[关键]"}
_LEVEL_MARKS = {"关键": "★", "重要": "●"}


def _relative_label(event_date: str, current_date: str) -> str:
    if not event_date or not current_date:
        return ""
    rel = calculate_detailed_relative_time(event_date, current_date)
    if rel.days is None or rel.days in (EARLIER, AFTER, BEFORE):
        return ""
    return f"({rel.label})"


def _time_lines(state: State, cfg: SummaryConfig) -> list[str]:
    if not state.story_date:
        return []
    lines = [f"[时间|{format_full_datetime(state.story_date, state.story_time)}]"]
    if cfg.send_timeline:
        ref = generate_time_reference(state.story_date)
        if ref and ref.type == "standard":
            lines.append(
                f"[时间参考|昨天={ref.yesterday}|前天={ref.day_before}|3天前={ref.three_days_ago}]"
            )
        elif ref and ref.type == "fantasy":
            lines.append("[时间参考|奇幻日历模式，参见剧情轨迹中的相对时间标记]")
    return lines


def _present_line(state: State) -> list[str]:
    if not state.characters_present:
        return []
    parts = []
    for char in state.characters_present:
        costume_key = next(
            (k for k in state.costumes if k == char or char in k or k in char),
            None,
        )
        if costume_key and state.costumes[costume_key]:
            parts.append(f"{char}({state.costumes[costume_key]})")
        else:
            parts.append(char)
    return [f"[在场|{'|'.join(parts)}]"]


def _item_lines(state: State) -> list[str]:
    if not state.items:
        return ["\n[物品清单] (空)"]
    lines = ["\n[物品清单]"]
    for name, item in state.items.items():
        desc = f" | {item.description}" if item.description else ""
        loc = f"@{item.location}" if item.location else ""
        lines.append(
            f"#{item.item_id or '???'} {item.icon or ''}{name}"
            f"{_IMPORTANCE_TAGS[item.importance]}{desc} = {item.holder or ''}{loc}"
        )
    return lines


def _character_lines(state: State) -> list[str]:
    lines = []
    scores = [(k, v) for k, v in state.affection.items() if v != 0]
    if scores:
        lines.append("[好感|" + "|".join(f"{k}:{'+' if v > 0 else ''}{v}" for k, v in scores) + "]")

    if state.npcs:
        lines.append("\n[已知NPC]")
        for name, npc in state.npcs.items():
            line = f"N{npc.npc_id or '?'} {name}"
            if npc.appearance or npc.personality or npc.relationship:
                line += f"｜{npc.appearance}={npc.personality}@{npc.relationship}"
            extras = []
            if npc.gender:
                extras.append(f"性别:{npc.gender}")
            if npc.age:
                extras.append(f"年龄:{calc_current_age(npc, state.story_date).display}")
            if npc.race:
                extras.append(f"种族:{npc.race}")
            if npc.job:
                extras.append(f"职业:{npc.job}")
            if npc.note:
                extras.append(f"补充:{npc.note}")
            if extras:
                line += "~" + "~".join(extras)
            lines.append(line)
    return lines


def _agenda_lines(state: State) -> list[str]:
    agenda = active_agenda(state)
    if not agenda:
        return []
    lines = ["\n[待办事项]"]
    for item in agenda:
        date = f"{item.date} " if item.date else ""
        lines.append(f"· {date}{item.text}")
    return lines


def _timeline_lines(state: State, events: Sequence[EventEntry], context_depth: int) -> list[str]:
    if not events:
        return []
    ordered = sorted(events, key=lambda e: e.turn_index)
    important = [e for e in ordered if e.event.is_important]
    normal = [e for e in ordered if not e.event.is_important]
    normal = normal[-context_depth:] if context_depth > 0 else []
    shown = sorted([*important, *normal], key=lambda e: e.turn_index)

    lines = ["\n[剧情轨迹]"]
    for e in shown:
        ts = e.timestamp
        date = ts.story_date if ts and ts.story_date else "?"
        time = ts.story_time if ts else ""
        when = f"{date} {time}" if time else date
        label = _relative_label(ts.story_date if ts else "", state.story_date)
        mark = _LEVEL_MARKS.get(e.event.level, "○")
        lines.append(f"{mark} #{e.turn_index} {when}{label}: {e.event.summary}")
    return lines


def render_table(table: Table) -> list[str]:
    """Table block: header row, data rows up to the last filled one, non-empty columns."""
    data = table.data

    def filled(r: int, c: int) -> bool:
        return bool((data.get(f"{r}-{c}") or "").strip())

    active_cols = [0]
    empty_cols = []
    for c in range(1, table.cols):
        if any(filled(r, c) for r in range(1, table.rows)):
            active_cols.append(c)
        else:
            empty_cols.append(c)

    last_row = 0
    for r in range(table.rows - 1, 0, -1):
        if any(filled(r, c) for c in range(1, table.cols)):
            last_row = r
            break
    last_row = last_row or 1

    lines = [f"\n[{table.name or '自定义表格'}]"]
    if table.prompt.strip():
        lines.append(f"(填写要求: {table.prompt.strip()})")

    header = []
    for c in active_cols:
        label = data.get(f"0-{c}") or ("表头" if c == 0 else f"列{c}")
        header.append(f"{label}🔒" if c in table.locked_cols else label)
    lines.append(" | ".join(header))

    for r in range(1, last_row + 1):
        row = []
        for c in active_cols:
            if c == 0:
                label = data.get(f"{r}-0") or str(r)
                row.append(f"{label}🔒" if r in table.locked_rows else label)
                continue
            value = data.get(f"{r}-{c}") or "-"
            row.append(f"{value}🔒" if f"{r}-{c}" in table.locked_cells else value)
        lines.append(" | ".join(row))

    if last_row < table.rows - 1:
        lines.append(f"(共{table.rows - 1}行，第{last_row + 1}-{table.rows - 1}行暂无数据)")
    if empty_cols:
        names = "、".join(data.get(f"0-{c}") or f"列{c}" for c in empty_cols)
        lines.append(f"({names}：暂无数据，对应事件未发生时禁止填写)")
    return lines


def build_summary(
    state: State,
    events: Sequence[EventEntry] = (),
    tables: Sequence[Table] = (),
    config: SummaryConfig | None = None,
) -> str:
    cfg = config or SummaryConfig()
    lines = [HEADER]
    lines += _time_lines(state, cfg)

    if state.location:
        scene = state.location + (f"|{state.atmosphere}" if state.atmosphere else "")
        lines.append(f"[场景|{scene}]")

    if cfg.send_characters:
        lines += _present_line(state)
    if cfg.send_items:
        lines += _item_lines(state)
    if cfg.send_characters:
        lines += _character_lines(state)
    lines += _agenda_lines(state)
    if cfg.send_timeline:
        lines += _timeline_lines(state, events, cfg.context_depth)

    for table in tables:
        if table.has_content() or table.prompt.strip():
            lines += render_table(table)
    return "\n".join(lines)
