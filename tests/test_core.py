"""Tests for the Horae orchestrator."""

from __future__ import annotations

import asyncio
import logging

import pytest

from horae.config import HoraeConfig
from horae.core import Horae, Turn
from horae.delta import AgendaItem, Delta, Event, Timestamp
from horae.parser import parse_tag
from horae.tables import Table, TableStore

NOW = "2024-01-01T00:00:00.000+00:00"

ANNOTATED = """两人抵达村庄。
<horae>
time:10/1 08:00
location:村庄
item:地图=艾伦
agenda:10/3|拜访村长
</horae>
<horaeevent>
event:重要|抵达村庄
</horaeevent>
<horaetable:任务>
1,1:送信
</horaetable>"""


@pytest.fixture
def tables() -> TableStore:
    return TableStore(local=[Table(name="任务", data={"0-1": "内容"})])


@pytest.fixture
def horae(tables: TableStore) -> Horae:
    turns = [
        Turn(text="我们出发吧", is_user=True),
        Turn(text=ANNOTATED),
        Turn(text="他们走了很久，什么也没发生。"),
    ]
    return Horae(turns, HoraeConfig(), tables, clock=lambda: NOW)


class TestProcessTurn:
    def test_annotated_turn(self, horae: Horae, tables: TableStore):
        assert horae.process_turn(1) is True
        delta = horae.turns[1].delta
        assert delta.timestamp == Timestamp("10/1", "08:00", NOW)
        assert delta.events == (Event("重要", "抵达村庄"),)
        assert delta.table_updates[0].cells == {"1-1": "送信"}
        assert tables.find("任务").data["1-1"] == "送信"

    def test_miss_stores_empty_delta(self, horae: Horae):
        assert horae.process_turn(2) is False
        assert horae.turns[2].delta == Delta()

    def test_miss_keeps_existing_delta(self, horae: Horae):
        stored = Delta(events=(Event("一般", "旧事件"),))
        horae.turns[2].delta = stored
        assert horae.process_turn(2) is False
        assert horae.turns[2].delta is stored

    def test_loose_fallback(self, horae: Horae):
        horae.turns[2].text = "夜色降临。\nlocation:客栈"
        assert horae.process_turn(2) is False
        assert horae.process_turn(2, loose=True) is True
        assert horae.turns[2].delta.scene.location == "客栈"

    def test_reannotation_merges(self, horae: Horae):
        horae.process_turn(1)
        horae.turns[1].text = "<horae>\nlocation:村长家\n</horae>"
        horae.process_turn(1)
        delta = horae.turns[1].delta
        assert delta.scene.location == "村长家"
        assert delta.timestamp.story_date == "10/1"
        assert delta.items["地图"].holder == "艾伦"
        assert delta.table_updates[0].name == "任务"

    def test_agenda_completion_across_turns(self, horae: Horae):
        horae.process_turn(1)
        horae.turns[2].text = "<horae>\nagenda-:拜访村长\n</horae>"
        horae.process_turn(2)
        assert horae.turns[1].delta.agenda == ()
        assert horae.turns[2].delta.deleted_agenda == ("拜访村长",)

    def test_completion_spares_agenda_added_in_same_turn(self, horae: Horae):
        horae.turns[2].text = "<horae>\nagenda:拜访村长\nagenda-:拜访村长\n</horae>"
        horae.process_turn(2)
        assert [a.text for a in horae.turns[2].delta.agenda] == ["拜访村长"]
        assert horae.turns[2].delta.deleted_agenda == ("拜访村长",)

    def test_index_out_of_range(self, horae: Horae):
        with pytest.raises(IndexError):
            horae.process_turn(3)
        with pytest.raises(IndexError):
            horae.process_turn(-1)


class TestDerivedViews:
    def test_state_and_summary(self, horae: Horae):
        horae.process_turn(1)
        state = horae.state()
        assert state.location == "村庄"
        assert "地图" in state.items
        summary = horae.summary()
        assert "[场景|村庄]" in summary
        assert "[任务]" in summary
        assert "● #1 10/1 08:00(今天): 抵达村庄" in summary

    def test_summary_skip_last(self, horae: Horae):
        horae.process_turn(1)
        assert "[场景|村庄]" not in horae.summary(skip_last=2)

    def test_state_stores_ids(self, horae: Horae):
        horae.turns[1].text = "<horae>\nitem:火把=艾伦\nitem:绳子=艾伦\n</horae>"
        horae.process_turn(1)
        assert horae.state().items["绳子"].item_id == "002"
        assert horae.dirty
        assert horae.turns[1].delta.items["绳子"].item_id == "002"

        horae.turns[2].text = "<horae>\nitem-:火把\n</horae>"
        horae.process_turn(2)
        state = horae.state()
        assert list(state.items) == ["绳子"]
        assert state.items["绳子"].item_id == "002"
        assert "#002" in horae.summary()

        horae.turns[1].text = "<horae>\nitem:绳子=莉娜\n</horae>"
        horae.process_turn(1)
        assert horae.state().items["绳子"].item_id == "002"

    def test_events(self, horae: Horae):
        horae.process_turn(1)
        assert [e.turn_index for e in horae.events()] == [1]

    def test_rebuild_tables(self, horae: Horae, tables: TableStore):
        horae.process_turn(1)
        tables.find("任务").data["2-1"] = "手动"
        assert horae.rebuild_tables() == 1
        assert tables.find("任务").data == {"0-1": "内容", "1-1": "送信"}

    def test_remove_completed_agenda(self, horae: Horae):
        horae.process_turn(1)
        assert horae.remove_completed_agenda(["拜访村长"]) == 1
        assert horae.state().agenda == []


class TestScanHistory:
    @pytest.mark.asyncio
    async def test_scan_without_analyzer(self, horae: Horae):
        progress = []
        result = await horae.scan_history(progress=lambda *args: progress.append(args))
        assert (result.processed, result.skipped) == (2, 1)
        assert horae.turns[0].delta is None
        assert horae.turns[1].delta.scene.location == "村庄"
        assert horae.turns[2].delta == Delta()
        assert progress == [(33, 1, 3), (67, 2, 3), (100, 3, 3)]

    @pytest.mark.asyncio
    async def test_scan_does_not_apply_tables(self, horae: Horae, tables: TableStore):
        await horae.scan_history()
        assert "1-1" not in tables.find("任务").data
        horae.rebuild_tables()
        assert tables.find("任务").data["1-1"] == "送信"

    @pytest.mark.asyncio
    async def test_skips_annotated_turns(self, horae: Horae):
        horae.turns[2].delta = Delta(timestamp=Timestamp("10/2"))
        result = await horae.scan_history()
        assert result.skipped == 2
        assert horae.turns[2].delta.timestamp.story_date == "10/2"

    @pytest.mark.asyncio
    async def test_async_analyzer(self, horae: Horae):
        seen = []

        async def analyze(text: str) -> Delta | None:
            seen.append(text)
            await asyncio.sleep(0)
            return parse_tag("<horae>\nlocation:荒野\n</horae>")

        result = await horae.scan_history(analyze=analyze)
        assert seen == ["他们走了很久，什么也没发生。"]
        assert result.processed == 2
        assert horae.turns[2].delta.scene.location == "荒野"
        assert horae.turns[2].delta.timestamp.absolute == NOW

    @pytest.mark.asyncio
    async def test_sync_analyzer_returning_none(self, horae: Horae):
        result = await horae.scan_history(analyze=lambda text: None)
        assert result.processed == 1
        assert horae.turns[2].delta is None

    @pytest.mark.asyncio
    async def test_analyzer_failure_is_not_fatal(self, horae: Horae, caplog):
        horae.turns.append(Turn(text="第二段无标注文本"))
        calls = []

        def analyze(text: str) -> Delta:
            calls.append(text)
            if len(calls) == 1:
                raise RuntimeError("backend down")
            return Delta(agenda=(AgendaItem("", "补记"),))

        with caplog.at_level(logging.ERROR):
            result = await horae.scan_history(analyze=analyze)
        assert len(calls) == 2
        assert horae.turns[2].delta is None
        assert horae.turns[3].delta.agenda[0].text == "补记"
        assert result.processed == 2
        assert "backend down" in caplog.text
