"""File-backed transcript — a reference host for the CLI.

Layout under the transcript root:

    turns/0000.md    YAML frontmatter (is_user, delta) + raw turn text
    turns/0001.md
    tables.json      local tables, replayed from turn contributions

Markdown files are the source of truth; nothing is cached between calls.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import frontmatter

from horae.core import Turn
from horae.delta import Delta
from horae.tables import Table, TableStore

logger = logging.getLogger(__name__)


class TranscriptStore:
    """Read/write access to a transcript directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.turns_dir = root / "turns"
        self.tables_path = root / "tables.json"

    def _ensure_initialized(self) -> None:
        self.turns_dir.mkdir(parents=True, exist_ok=True)

    def _turn_path(self, index: int) -> Path:
        return self.turns_dir / f"{index:04d}.md"

    # ── Turns ────────────────────────────────────────────────

    def _load_turn(self, path: Path) -> Turn:
        try:
            post = frontmatter.load(str(path))
        except Exception as e:
            logger.warning("Malformed turn file %s: %s", path.name, e)
            return Turn(text=path.read_text(encoding="utf-8"))

        meta = post.metadata
        raw_delta = meta.get("delta")
        if raw_delta is not None and not isinstance(raw_delta, dict):
            logger.warning("Ignoring non-mapping delta in %s", path.name)
            raw_delta = None
        return Turn(
            text=post.content,
            is_user=bool(meta.get("is_user", False)),
            delta=Delta.from_dict(raw_delta) if raw_delta is not None else None,
        )

    def load_turns(self) -> list[Turn]:
        if not self.turns_dir.is_dir():
            return []
        return [self._load_turn(p) for p in sorted(self.turns_dir.glob("*.md"))]

    def _write_turn(self, index: int, turn: Turn) -> Path:
        metadata: dict = {"is_user": turn.is_user}
        if turn.delta is not None:
            metadata["delta"] = turn.delta.to_dict()
        post = frontmatter.Post(turn.text, **metadata)
        path = self._turn_path(index)
        path.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
        return path

    def save_turns(self, turns: list[Turn]) -> None:
        """Rewrite every turn file; stale files past the end are removed."""
        self._ensure_initialized()
        for i, turn in enumerate(turns):
            self._write_turn(i, turn)
        for stale in sorted(self.turns_dir.glob("*.md"))[len(turns) :]:
            stale.unlink()
            logger.debug("Removed stale turn file %s", stale.name)

    def append_turn(self, text: str, is_user: bool = False) -> Path:
        self._ensure_initialized()
        index = len(list(self.turns_dir.glob("*.md")))
        return self._write_turn(index, Turn(text=text, is_user=is_user))

    # ── Tables ───────────────────────────────────────────────

    def load_tables(self, global_tables: list[Table] | None = None) -> TableStore:
        local: list[Table] = []
        if self.tables_path.exists():
            try:
                raw = json.loads(self.tables_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                logger.warning("Malformed %s: %s", self.tables_path.name, e)
                raw = []
            local = [Table.from_dict(t) for t in raw if isinstance(t, dict)]
        return TableStore(local=local, global_tables=global_tables)

    def save_tables(self, store: TableStore) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.tables_path.write_text(
            json.dumps([t.to_dict() for t in store.local], ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
