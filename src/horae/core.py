"""Horae orchestrator — drives parser, fold and table engine over a host's turns.

Responsibilities:
1. Process a freshly generated turn: parse, merge into its stored Delta, apply tables
2. Backfill history — annotate turns that were never processed
3. Derive State / events / compact summary on demand (never cached)
4. Rebuild tables after the turn list was edited
"""

from __future__ import annotations

import inspect
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, MutableSequence, Union

from horae.config import HoraeConfig
from horae.delta import Delta, merge_delta, utc_now
from horae.parser import parse_loose, parse_tag
from horae.state import (
    EventEntry,
    State,
    TurnLike,
    collect_events,
    compute_state,
    persist_ids,
    remove_completed_agenda,
)
from horae.summary import build_summary
from horae.tables import TableStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]
AnalyzeCallback = Callable[[str], Union[Delta, None, Awaitable[Union[Delta, None]]]]


@dataclass
class Turn:
    """One narrative message, as a host would hand it over."""

    text: str
    is_user: bool = False
    delta: Delta | None = None


@dataclass
class ScanResult:
    processed: int = 0
    skipped: int = 0


class Horae:
    """World-state tracker over one story's turn ledger."""

    def __init__(
        self,
        turns: MutableSequence[TurnLike],
        config: HoraeConfig | None = None,
        tables: TableStore | None = None,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self.turns = turns
        self.config = config or HoraeConfig()
        self.tables = tables or TableStore(global_tables=self.config.global_tables)
        self.clock = clock
        # Set when a derived view wrote ids into stored Deltas
        self.dirty = False

    # ── Per-turn processing ──────────────────────────────────

    def process_turn(self, index: int, loose: bool = False) -> bool:
        """Parse turn `index` and store the result. False when it carries no annotation."""
        if not 0 <= index < len(self.turns):
            raise IndexError(f"turn index {index} out of range (0..{len(self.turns) - 1})")
        turn = self.turns[index]

        parsed = parse_tag(turn.text, now=self.clock())
        if parsed is None and loose:
            parsed = parse_loose(turn.text, now=self.clock())
        if parsed is None:
            if turn.delta is None:
                turn.delta = Delta()
            return False

        merged = merge_delta(turn.delta, parsed, now=self.clock())
        if parsed.table_updates:
            self.tables.apply_updates(parsed.table_updates)
        # Completions only reach agenda stored before this turn's new annotation
        if parsed.deleted_agenda:
            removed = remove_completed_agenda(self.turns, parsed.deleted_agenda)
            logger.debug("Turn #%d completed %d agenda items", index, removed)
        turn.delta = merged
        return True

    # ── Backfill ─────────────────────────────────────────────

    async def scan_history(
        self,
        progress: ProgressCallback | None = None,
        analyze: AnalyzeCallback | None = None,
    ) -> ScanResult:
        """Annotate every un-annotated model turn, one at a time.

        Turns that parse are stored directly; the rest go to `analyze` when
        given (sync or async). A failing `analyze` leaves that turn without a
        Delta and the scan carries on.
        """
        result = ScanResult()
        total = len(self.turns)

        for i, turn in enumerate(self.turns):
            if turn.is_user or (turn.delta is not None and turn.delta.has_annotation()):
                result.skipped += 1
                self._report(progress, i, total)
                continue

            parsed = parse_tag(turn.text, now=self.clock())
            if parsed is not None:
                turn.delta = merge_delta(None, parsed, now=self.clock())
                result.processed += 1
            elif analyze is not None:
                try:
                    analyzed = analyze(turn.text)
                    if inspect.isawaitable(analyzed):
                        analyzed = await analyzed
                except Exception:
                    logger.exception("分析消息 #%d 失败", i)
                else:
                    if analyzed is not None:
                        turn.delta = merge_delta(None, analyzed, now=self.clock())
                        result.processed += 1
            else:
                turn.delta = Delta()
                result.processed += 1

            self._report(progress, i, total)

        logger.info("History scan: %d processed, %d skipped", result.processed, result.skipped)
        return result

    @staticmethod
    def _report(progress: ProgressCallback | None, i: int, total: int) -> None:
        if progress:
            progress(math.floor((i + 1) / total * 100 + 0.5), i + 1, total)

    # ── Derived views ────────────────────────────────────────

    def state(self, skip_last: int = 0) -> State:
        """Fold the ledger and store any newly allocated ids in it."""
        state = compute_state(self.turns, skip_last=skip_last, clock=self.clock)
        if persist_ids(self.turns, state):
            self.dirty = True
        return state

    def events(self, limit: int = 0, level: str = "all", skip_last: int = 0) -> list[EventEntry]:
        return collect_events(self.turns, limit=limit, level=level, skip_last=skip_last)

    def summary(self, skip_last: int = 0) -> str:
        """Compact summary for the next prompt. skip_last drops turns being redrafted."""
        return build_summary(
            self.state(skip_last),
            self.events(skip_last=skip_last),
            self.tables.all_tables(),
            self.config.summary,
        )

    # ── Ledger maintenance ───────────────────────────────────

    def rebuild_tables(self) -> int:
        return self.tables.rebuild(self.turns)

    def remove_completed_agenda(self, targets: list[str]) -> int:
        return remove_completed_agenda(self.turns, targets)
