"""Tests for the state fold, age projection, events and agenda removal."""

from __future__ import annotations

from horae.core import Turn
from horae.delta import AgendaItem, Delta
from horae.parser import parse_tag
from horae.state import (
    NpcRecord,
    active_agenda,
    calc_current_age,
    collect_events,
    compute_state,
    persist_ids,
    remove_completed_agenda,
)

NOW = "2024-01-01T00:00:00.000+00:00"


def clock() -> str:
    return NOW


def turn(body: str, events: str = "") -> Turn:
    text = f"<horae>\n{body}\n</horae>"
    if events:
        text += f"\n<horaeevent>\n{events}\n</horaeevent>"
    return Turn(text=text, delta=parse_tag(text, now=NOW))


def fold(*turns: Turn, skip_last: int = 0):
    return compute_state(list(turns), skip_last=skip_last, clock=clock)


class TestScalars:
    def test_last_write_wins_but_empty_never_erases(self):
        state = fold(
            turn("time:10/1 08:00\nlocation:森林\natmosphere:宁静\ncharacters:艾伦"),
            turn("time:10/2\nlocation:村庄"),
        )
        assert state.story_date == "10/2"
        assert state.story_time == "08:00"
        assert state.location == "村庄"
        assert state.atmosphere == "宁静"
        assert state.characters_present == ["艾伦"]

    def test_costumes_per_character(self):
        state = fold(turn("costume:艾伦=斗篷\ncostume:莉娜=长裙"), turn("costume:艾伦=铠甲"))
        assert state.costumes == {"艾伦": "铠甲", "莉娜": "长裙"}

    def test_turns_without_delta_are_skipped(self):
        state = fold(Turn(text="hi", is_user=True), turn("location:森林"))
        assert state.location == "森林"

    def test_skip_last(self):
        turns = [turn("location:森林"), turn("location:村庄")]
        assert compute_state(turns, skip_last=1, clock=clock).location == "森林"
        assert compute_state(turns, skip_last=5, clock=clock).location == ""

    def test_idempotent(self):
        turns = [
            turn("item:🍺麦酒(50L)=U@柜子\nnpc:艾伦~年龄:20\naffection:艾伦+3\nagenda:买面包"),
            turn("item:🍺麦酒(25L)=U@柜子\nitem:匕首=U"),
        ]
        assert compute_state(turns, clock=clock) == compute_state(turns, clock=clock)


class TestItems:
    def test_end_to_end_rename_then_delete(self):
        t1 = turn("item:🍺麦酒(50L)=U@柜子")
        t2 = turn("item:🍺麦酒(25L)=U@柜子")
        t3 = turn("item-:麦酒")

        state = fold(t1, t2)
        assert list(state.items) == ["麦酒(25L)"]
        beer = state.items["麦酒(25L)"]
        assert beer.holder == "U"
        assert beer.location == "柜子"
        assert beer.icon == "🍺"

        assert fold(t1, t2, t3).items == {}

    def test_zero_quantity_consumes(self):
        state = fold(turn("item:清水(9L)=U"), turn("item:清水(0L)=U"))
        assert state.items == {}
        state = fold(turn("item:苹果(3)=U"), turn("item:苹果(0)=U"))
        assert state.items == {}

    def test_consumed_marker_and_holder(self):
        assert fold(turn("item:面包=U"), turn("item:面包(已用完)=U")).items == {}
        assert fold(turn("item:药水=U"), turn("item:药水=消耗")).items == {}
        assert fold(turn("item:绳子=U"), turn("item:绳子=无")).items == {}

    def test_delete_is_case_insensitive(self):
        assert fold(turn("item:Sword=U"), turn("item-:sword")).items == {}

    def test_importance_never_decreases(self):
        state = fold(turn("item!!:圣剑=艾伦"), turn("item:圣剑=莉娜"), turn("item!:圣剑=莉娜"))
        sword = state.items["圣剑"]
        assert sword.importance == "critical"
        assert sword.holder == "莉娜"

    def test_importance_upgrades(self):
        assert fold(turn("item:戒指=U"), turn("item!:戒指=U")).items["戒指"].importance == "important"

    def test_description_is_sticky(self):
        state = fold(
            turn("item:地图|藏宝图=艾伦"),
            turn("item:地图=莉娜"),
            turn("item:地图|=莉娜"),
        )
        assert state.items["地图"].description == "藏宝图"
        state = fold(turn("item:地图|藏宝图=艾伦"), turn("item:地图|残破的藏宝图=艾伦"))
        assert state.items["地图"].description == "残破的藏宝图"

    def test_holder_and_location_can_clear(self):
        state = fold(turn("item:钥匙=艾伦@口袋"), turn("item:钥匙=@桌上"))
        assert state.items["钥匙"].holder is None
        assert state.items["钥匙"].location == "桌上"

    def test_icon_replaced_only_when_present(self):
        state = fold(turn("item:🍎苹果=U"), turn("item:苹果=U"))
        assert state.items["苹果"].icon == "🍎"

    def test_rekey_moves_to_end(self):
        state = fold(turn("item:清水(9L)=U\nitem:面包=U"), turn("item:清水(5L)=U"))
        assert list(state.items) == ["面包", "清水(5L)"]
        assert state.items["面包"].item_id == "001"
        assert state.items["清水(5L)"].item_id == "002"

    def test_rekey_keeps_stored_id(self):
        stored = Turn(text="", delta=Delta.from_dict({"items": {"清水(9L)": {"holder": "U", "id": "005"}}}))
        state = fold(stored, turn("item:清水(5L)=U\nitem:面包=U"))
        assert state.items["清水(5L)"].item_id == "005"
        assert state.items["面包"].item_id == "006"

    def test_ids_continue_after_stored_ids(self):
        stored = Turn(text="", delta=Delta.from_dict({"items": {"钥匙": {"holder": "U", "id": "007"}}}))
        state = fold(stored, turn("item:门票=U"))
        assert state.items["钥匙"].item_id == "007"
        assert state.items["门票"].item_id == "008"

    def test_find_item_by_id(self):
        state = fold(turn("item:钥匙=U"))
        for key in ("#1", "001", "1"):
            assert state.find_item_by_id(key)[0] == "钥匙"
        assert state.find_item_by_id("#2") is None


class TestPersistIds:
    def test_ids_written_to_creating_turn(self):
        turns = [turn("item:火把=A@背包\nitem:绳子=A@背包\nnpc:老板|胖=和善@店主")]
        assert persist_ids(turns, compute_state(turns, clock=clock)) == 1
        assert turns[0].delta.items["火把"].item_id == "001"
        assert turns[0].delta.items["绳子"].item_id == "002"
        assert turns[0].delta.npcs["老板"].npc_id == "001"
        assert persist_ids(turns, compute_state(turns, clock=clock)) == 0

    def test_id_survives_deleting_earlier_item(self):
        turns = [turn("item:火把=A@背包\nitem:绳子=A@背包")]
        persist_ids(turns, compute_state(turns, clock=clock))
        turns.append(turn("item-:火把"))

        state = compute_state(turns, clock=clock)
        assert list(state.items) == ["绳子"]
        assert state.items["绳子"].item_id == "002"
        turns.append(turn("item:地图=A"))
        assert compute_state(turns, clock=clock).items["地图"].item_id == "003"

    def test_rekeyed_item_keeps_id_from_first_turn(self):
        turns = [turn("item:面包=A\nitem:清水(9L)=A")]
        persist_ids(turns, compute_state(turns, clock=clock))
        turns.append(turn("item:清水(5L)=A"))

        state = compute_state(turns, clock=clock)
        assert persist_ids(turns, state) == 0
        assert state.items["清水(5L)"].item_id == "002"
        assert turns[1].delta.items["清水(5L)"].item_id is None

    def test_later_turn_only_gets_its_own_records(self):
        turns = [turn("item:火把=A"), turn("item:绳子=A")]
        assert persist_ids(turns, compute_state(turns, clock=clock)) == 2
        assert turns[1].delta.items["绳子"].item_id == "002"
        assert "火把" not in turns[1].delta.items


class TestAffection:
    def test_absolute_then_relative(self):
        state = fold(turn("affection:艾伦=50"), turn("affection:艾伦+5"))
        assert state.affection["艾伦"] == 55

    def test_relative_from_zero(self):
        state = fold(turn("affection:艾伦+10"), turn("affection:艾伦-3"))
        assert state.affection["艾伦"] == 7

    def test_legacy_storage_value(self):
        stored = Turn(text="", delta=Delta.from_dict({"affection": {"艾伦": "+4", "莉娜": "abc"}}))
        state = fold(stored)
        assert state.affection == {"艾伦": 4, "莉娜": 0}


class TestNpcs:
    def test_insert_defaults(self):
        state = fold(turn("npc:老板|胖胖的=和善@酒馆老板"))
        npc = state.npcs["老板"]
        assert npc.appearance == "胖胖的"
        assert npc.gender == ""
        assert npc.first_seen == NOW
        assert npc.npc_id == "001"

    def test_protected_fields_locked(self):
        state = fold(turn("npc:艾伦~性别:男~种族:人类"), turn("npc:艾伦~性别:女~种族:精灵"))
        assert state.npcs["艾伦"].gender == "男"
        assert state.npcs["艾伦"].race == "人类"

    def test_protected_field_fills_when_empty(self):
        state = fold(turn("npc:艾伦|高个=冷淡@朋友"), turn("npc:艾伦~性别:男"))
        assert state.npcs["艾伦"].gender == "男"
        assert state.npcs["艾伦"].appearance == "高个"

    def test_updatable_fields_overwrite(self):
        state = fold(turn("npc:艾伦|高个=冷淡@朋友~职业:佣兵"), turn("npc:艾伦|瘦削=@恋人~职业:骑士"))
        npc = state.npcs["艾伦"]
        assert npc.appearance == "瘦削"
        assert npc.personality == "冷淡"
        assert npc.relationship == "恋人"
        assert npc.job == "骑士"

    def test_age_ref_date_tracks_changes(self):
        t1 = turn("time:2024/1/1\nnpc:艾伦~年龄:20")
        t2 = turn("time:2025/6/1\nnpc:艾伦~年龄:21")
        t3 = turn("time:2026/1/1\nnpc:艾伦~年龄:21")
        assert fold(t1).npcs["艾伦"].age_ref_date == "2024/1/1"
        assert fold(t1, t2).npcs["艾伦"].age_ref_date == "2025/6/1"
        assert fold(t1, t2, t3).npcs["艾伦"].age_ref_date == "2025/6/1"

    def test_first_age_stamps_ref_date(self):
        state = fold(turn("time:2024/1/1\nnpc:艾伦|高个"), turn("time:2024/2/1\nnpc:艾伦~年龄:少年"))
        assert state.npcs["艾伦"].age_ref_date == "2024/2/1"


class TestAgeProjection:
    def test_projection_after_birthday(self):
        npc = NpcRecord(age="20", age_ref_date="2024/1/1")
        result = calc_current_age(npc, "2026/1/2")
        assert result.display == "22"
        assert result.original == "20"
        assert result.changed

    def test_projection_before_birthday(self):
        npc = NpcRecord(age="20", age_ref_date="2024/1/1")
        assert calc_current_age(npc, "2025/12/31").display == "21"

    def test_unchanged_cases(self):
        assert not calc_current_age(NpcRecord(age="少年", age_ref_date="2024/1/1"), "2026/1/2").changed
        assert not calc_current_age(NpcRecord(age="20"), "2026/1/2").changed
        assert not calc_current_age(NpcRecord(age="20", age_ref_date="10/1"), "2026/1/2").changed
        assert not calc_current_age(NpcRecord(age="20", age_ref_date="2024/1/1"), "第三日").changed
        assert calc_current_age(NpcRecord(age="20", age_ref_date="2024/5/1"), "2025/4/30").display == "20"

    def test_fold_then_project(self):
        state = fold(turn("time:2024/1/1\nnpc:艾伦~年龄:20"), turn("time:2026/1/2"))
        assert calc_current_age(state.npcs["艾伦"], state.story_date).display == "22"


class TestEvents:
    def test_collect_in_turn_order(self):
        turns = [
            turn("time:10/1", "event:一般|出发\nevent:重要|遇袭"),
            turn("location:森林"),
            turn("time:10/2", "event:关键|决战"),
        ]
        entries = collect_events(turns)
        assert [(e.turn_index, e.event_index) for e in entries] == [(0, 0), (0, 1), (2, 0)]
        assert entries[2].timestamp.story_date == "10/2"

    def test_filters(self):
        turns = [turn("time:10/1", "event:一般|出发\nevent:重要|遇袭"), turn("time:10/2", "event:关键|决战")]
        assert [e.event.summary for e in collect_events(turns, level="重要")] == ["遇袭"]
        assert len(collect_events(turns, limit=2)) == 2
        assert len(collect_events(turns, skip_last=1)) == 2


class TestAgenda:
    def test_fold_dedupes_within_a_turn(self):
        state = fold(turn("agenda:买面包\nagenda:买面包"), turn("agenda:买面包"))
        assert [a.text for a in state.agenda] == ["买面包", "买面包"]
        assert [a.text for a in active_agenda(state)] == ["买面包"]

    def test_active_agenda_skips_done(self):
        done = Turn(
            text="",
            delta=Delta(agenda=(AgendaItem("", "旧事", done=True), AgendaItem("3/6", "交付货物"))),
        )
        assert [a.text for a in active_agenda(fold(done))] == ["交付货物"]

    def test_removal_matches_both_directions(self):
        turns = [
            turn("agenda:2026/02/10|艾伦邀请${user}情人节晚上约会(2026/02/14 18:00)"),
            turn("agenda:买面包"),
        ]
        assert remove_completed_agenda(turns, ["艾伦邀请${user}情人节晚上约会"]) == 1
        assert turns[0].delta.agenda == ()
        assert len(turns[1].delta.agenda) == 1

        turns = [turn("agenda:约会")]
        assert remove_completed_agenda(turns, ["艾伦邀请${user}情人节晚上约会"]) == 1
        assert turns[0].delta.agenda == ()

    def test_removal_needs_contiguous_text(self):
        turns = [turn("agenda:去酒馆找铁匠艾伦谈谈价格")]
        assert remove_completed_agenda(turns, ["去找艾伦"]) == 0
        assert remove_completed_agenda(turns, ["艾伦邀请约会"]) == 0
        assert len(turns[0].delta.agenda) == 1

    def test_removal_is_case_sensitive(self):
        turns = [turn("agenda:Meet Bob")]
        assert remove_completed_agenda(turns, ["meet bob"]) == 0
        assert remove_completed_agenda(turns, []) == 0
