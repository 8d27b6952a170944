"""Table merge engine — lock-respecting cell writes and deterministic replay.

Cells are keyed "row-col". Row 0 and column 0 hold headers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from horae.delta import TableUpdate
from horae.state import TurnLike

logger = logging.getLogger(__name__)


def _split_key(key: str) -> tuple[int, int] | None:
    row, sep, col = key.partition("-")
    if not sep or not row.isdigit() or not col.isdigit():
        return None
    return int(row), int(col)


def _is_header(key: str) -> bool:
    rc = _split_key(key)
    return rc is not None and (rc[0] == 0 or rc[1] == 0)


@dataclass
class Table:
    name: str
    rows: int = 2
    cols: int = 2
    data: dict[str, str] = field(default_factory=dict)
    prompt: str = ""
    locked_rows: set[int] = field(default_factory=set)
    locked_cols: set[int] = field(default_factory=set)
    locked_cells: set[str] = field(default_factory=set)
    base_data: dict[str, str] | None = None
    base_rows: int | None = None
    base_cols: int | None = None

    def is_locked(self, row: int, col: int) -> bool:
        return row in self.locked_rows or col in self.locked_cols or f"{row}-{col}" in self.locked_cells

    def has_content(self) -> bool:
        return any(v and v.strip() for v in self.data.values())

    def snapshot_baseline(self) -> None:
        """Remember the current contents as the state replay starts from."""
        self.base_data = dict(self.data)
        self.base_rows = self.rows
        self.base_cols = self.cols

    def reset_to_baseline(self) -> None:
        if self.base_data is not None:
            self.data = dict(self.base_data)
        else:
            # No snapshot: keep the header row and column only
            self.data = {k: v for k, v in self.data.items() if _is_header(k)}

        if self.base_rows is not None:
            self.rows = self.base_rows
        elif self.base_data is not None:
            rows, cols = 2, 2
            for key in self.base_data:
                rc = _split_key(key)
                if rc is None:
                    continue
                r, c = rc
                if r == 0 and c + 1 > cols:
                    cols = c + 1
                if c == 0 and r + 1 > rows:
                    rows = r + 1
            self.rows, self.cols = rows, cols
        if self.base_cols is not None:
            self.cols = self.base_cols

    def write(self, cells: dict[str, str]) -> tuple[int, int]:
        """Write cells, skipping filled headers and locked cells. Returns (updated, blocked)."""
        updated = blocked = 0
        for key, value in cells.items():
            rc = _split_key(key)
            if rc is None:
                continue
            r, c = rc
            if (r == 0 or c == 0) and (self.data.get(key) or "").strip():
                continue
            if self.is_locked(r, c):
                blocked += 1
                continue
            self.data[key] = value
            updated += 1
            self.rows = max(self.rows, r + 1)
            self.cols = max(self.cols, c + 1)
        return updated, blocked

    # ── Storage shape ─────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "rows": self.rows,
            "cols": self.cols,
            "data": dict(self.data),
        }
        if self.prompt:
            data["prompt"] = self.prompt
        if self.locked_rows:
            data["locked_rows"] = sorted(self.locked_rows)
        if self.locked_cols:
            data["locked_cols"] = sorted(self.locked_cols)
        if self.locked_cells:
            data["locked_cells"] = sorted(self.locked_cells)
        if self.base_data is not None:
            data["base_data"] = dict(self.base_data)
        if self.base_rows is not None:
            data["base_rows"] = self.base_rows
        if self.base_cols is not None:
            data["base_cols"] = self.base_cols
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Table:
        base_data = data.get("base_data")
        return cls(
            name=str(data.get("name") or ""),
            rows=int(data.get("rows") or 2),
            cols=int(data.get("cols") or 2),
            data={str(k): str(v) for k, v in (data.get("data") or {}).items()},
            prompt=data.get("prompt") or "",
            locked_rows={int(r) for r in data.get("locked_rows") or ()},
            locked_cols={int(c) for c in data.get("locked_cols") or ()},
            locked_cells={str(k) for k in data.get("locked_cells") or ()},
            base_data=dict(base_data) if base_data is not None else None,
            base_rows=data.get("base_rows"),
            base_cols=data.get("base_cols"),
        )


@dataclass
class TableApplyReport:
    updated: dict[str, int] = field(default_factory=dict)
    blocked: dict[str, int] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)


class TableStore:
    """Local (per-story) tables searched before global ones."""

    def __init__(
        self,
        local: list[Table] | None = None,
        global_tables: list[Table] | None = None,
    ) -> None:
        self.local = local if local is not None else []
        self.global_tables = global_tables if global_tables is not None else []

    def find(self, name: str) -> Table | None:
        name = name.strip()
        for table in self.local:
            if table.name.strip() == name:
                return table
        for table in self.global_tables:
            if table.name.strip() == name:
                return table
        return None

    def all_tables(self) -> list[Table]:
        return [*self.global_tables, *self.local]

    def apply_updates(self, updates: Sequence[TableUpdate]) -> TableApplyReport:
        report = TableApplyReport()
        for update in updates:
            name = update.name.strip()
            table = self.find(name)
            if table is None:
                logger.warning("表格 %r 不存在，跳过", name)
                report.unresolved.append(name)
                continue

            updated, blocked = table.write(update.cells)
            report.updated[name] = report.updated.get(name, 0) + updated
            report.blocked[name] = report.blocked.get(name, 0) + blocked
            if blocked:
                logger.info("表格 %r 拦截 %d 个锁定单元格的修改", name, blocked)
            logger.info("表格 %r 已更新 %d 个单元格", name, updated)
        return report

    def rebuild(self, turns: Sequence[TurnLike]) -> int:
        """Reset every table to its baseline and replay all stored contributions.

        Returns the number of turns whose contributions were replayed.
        """
        for table in self.all_tables():
            table.reset_to_baseline()

        replayed = 0
        for turn in turns:
            if turn.delta is not None and turn.delta.table_updates:
                self.apply_updates(turn.delta.table_updates)
                replayed += 1
        logger.info("表格数据已重建，回放了 %d 条消息的表格贡献", replayed)
        return replayed
