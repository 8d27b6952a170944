"""Tests for the file-backed transcript and the command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from horae.__main__ import main
from horae.core import Turn
from horae.delta import Delta, Event, Timestamp
from horae.tables import Table, TableStore
from horae.transcript import TranscriptStore

ANNOTATED = """两人抵达村庄。
<horae>
time:10/1 08:00
location:村庄
item:地图=艾伦
</horae>
<horaetable:任务>
1,1:送信
</horaetable>"""


@pytest.fixture
def store(tmp_path: Path) -> TranscriptStore:
    return TranscriptStore(tmp_path / "story")


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for key in ["HORAE_CONTEXT_DEPTH", "HORAE_LOG_LEVEL", "HORAE_TRANSCRIPT_DIR"]:
        monkeypatch.delenv(key, raising=False)


class TestTurns:
    def test_empty_directory(self, store: TranscriptStore):
        assert store.load_turns() == []

    def test_append_and_load(self, store: TranscriptStore):
        store.append_turn("出发吧", is_user=True)
        path = store.append_turn(ANNOTATED)
        assert path.name == "0001.md"

        turns = store.load_turns()
        assert [t.is_user for t in turns] == [True, False]
        assert turns[1].text == ANNOTATED
        assert turns[1].delta is None

    def test_delta_survives_save(self, store: TranscriptStore):
        delta = Delta(
            timestamp=Timestamp("10/1", "14:00", "2024-01-01T00:00:00.000+00:00"),
            events=(Event("重要", "抵达"),),
        )
        store.save_turns([Turn(text="正文", delta=delta)])
        [loaded] = store.load_turns()
        assert loaded.delta == delta
        assert loaded.text == "正文"

    def test_save_removes_stale_files(self, store: TranscriptStore):
        for text in ("a", "b", "c"):
            store.append_turn(text)
        store.save_turns([Turn(text="only")])
        assert [p.name for p in store.turns_dir.glob("*.md")] == ["0000.md"]

    def test_malformed_frontmatter(self, store: TranscriptStore, caplog):
        store.turns_dir.mkdir(parents=True)
        (store.turns_dir / "0000.md").write_text("---\nis_user: [\n---\n正文\n", encoding="utf-8")
        (store.turns_dir / "0001.md").write_text("---\ndelta: 3\n---\n正文\n", encoding="utf-8")

        first, second = store.load_turns()
        assert first.delta is None
        assert "正文" in first.text
        assert second.delta is None
        assert "0000.md" in caplog.text


class TestTables:
    def test_round_trip(self, store: TranscriptStore):
        table = Table(name="任务", data={"0-1": "内容"}, locked_cols={1})
        table.snapshot_baseline()
        store.save_tables(TableStore(local=[table]))

        loaded = store.load_tables(global_tables=[Table(name="世界")])
        assert loaded.local == [table]
        assert loaded.find("世界") is not None

    def test_missing_or_malformed(self, store: TranscriptStore):
        assert store.load_tables().local == []
        store.root.mkdir(parents=True)
        store.tables_path.write_text("{not json", encoding="utf-8")
        assert store.load_tables().local == []


class TestCli:
    def test_usage(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 1
        assert "Usage" in capsys.readouterr().out

    def test_missing_directory(self, tmp_path: Path, capsys):
        with pytest.raises(SystemExit):
            main(["state", str(tmp_path / "nope")])
        assert "not found" in capsys.readouterr().err

    def test_scan_then_state(self, store: TranscriptStore, capsys):
        store.append_turn("出发吧", is_user=True)
        store.append_turn(ANNOTATED)
        store.save_tables(TableStore(local=[Table(name="任务", data={"0-1": "内容"})]))

        main(["scan", str(store.root)])
        assert "processed=1 skipped=1" in capsys.readouterr().out
        assert store.load_turns()[1].delta.scene.location == "村庄"
        assert store.load_tables().find("任务").data["1-1"] == "送信"

        main(["state", str(store.root)])
        out = capsys.readouterr().out
        assert "[场景|村庄]" in out
        assert "地图" in out
        assert store.load_turns()[1].delta.items["地图"].item_id == "001"

        main(["state", "--skip", "1", str(store.root)])
        assert "[场景|村庄]" not in capsys.readouterr().out

    def test_state_uses_configured_directory(self, store: TranscriptStore, monkeypatch, capsys):
        store.save_turns([Turn(text="", delta=Delta(timestamp=Timestamp("10/1")))])
        monkeypatch.setenv("HORAE_TRANSCRIPT_DIR", str(store.root))
        main(["state"])
        assert "[时间|10/1" in capsys.readouterr().out

    def test_parse(self, tmp_path: Path, capsys):
        raw = tmp_path / "turn.txt"
        raw.write_text("location:客栈\n夜深了。", encoding="utf-8")
        main(["parse", str(raw)])
        data = json.loads(capsys.readouterr().out)
        assert data["scene"]["location"] == "客栈"
