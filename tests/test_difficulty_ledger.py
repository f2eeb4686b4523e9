"""Tests for the grade ledger, its projection and concurrency handling."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.db import reinforcement_store as store
from app.models.enums import EvidenceSource, Grade
from app.services import difficulty_ledger as ledger
from app.services.errors import ConcurrencyConflict, InvalidGrade
from support import setup_test_db, create_world


class TestGradeArithmetic:

    def test_ordinals_are_explicit(self):
        assert [ledger.ordinal(g) for g in ("None", "Low", "Medium", "High")] == [0, 1, 2, 3]

    def test_improvement_means_lower_grade(self):
        assert ledger.is_improvement(Grade.HIGH, Grade.LOW)
        assert not ledger.is_improvement(Grade.LOW, Grade.LOW)
        assert not ledger.is_improvement(Grade.NONE, Grade.MEDIUM)

    def test_trend(self):
        assert ledger.trend("High", "None") == "improved"
        assert ledger.trend("Low", "Medium") == "worsened"
        assert ledger.trend("Medium", "Medium") == "unchanged"

    def test_compute_grade_gameplay_uses_outcome(self):
        assert ledger.compute_grade(EvidenceSource.GAMEPLAY, "High", Grade.NONE) == Grade.HIGH
        with pytest.raises(InvalidGrade):
            ledger.compute_grade(EvidenceSource.GAMEPLAY, "Severe", Grade.NONE)

    def test_compute_grade_session_uses_tiers(self):
        source = EvidenceSource.REINFORCEMENT_SESSION
        assert ledger.compute_grade(source, 90, Grade.LOW) == Grade.NONE
        assert ledger.compute_grade(source, 20, Grade.MEDIUM) == Grade.MEDIUM

    def test_fold_history(self):
        assert ledger.fold_history([]) == Grade.NONE
        events = [{"new_grade": "High"}, {"new_grade": "Low"}, {"new_grade": "Medium"}]
        assert ledger.fold_history(events) == Grade.MEDIUM


class TestKeyedLock:

    def test_same_key_is_serialized_and_released(self):
        locks = ledger.KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold(("s", 1)):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        async def scenario():
            await asyncio.gather(worker("a"), worker("b"))
            return len(locks)

        remaining = asyncio.run(scenario())
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert remaining == 0


class TestRecordEvidence:

    def test_first_event_starts_from_none(self):
        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            event = await ledger.record_evidence(
                db, world["student_id"], world["difficulty_id"], EvidenceSource.GAMEPLAY, "Low"
            )
            grade = await ledger.get_current_grade(db, world["student_id"], world["difficulty_id"])
            record = await store.get_record(db, world["student_id"], world["difficulty_id"])
            await db.close()
            return event, grade, record

        event, grade, record = asyncio.run(scenario())
        assert event.previous_grade == Grade.NONE
        assert event.new_grade == Grade.LOW
        assert grade == Grade.LOW
        assert record["version"] == 1
        assert record["last_event_id"] == event.event_id

    def test_no_record_reads_as_none(self):
        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            grade = await ledger.get_current_grade(db, world["student_id"], world["difficulty_id"])
            await db.close()
            return grade

        assert asyncio.run(scenario()) is None

    def test_events_chain_and_record_matches_fold(self):
        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            s, d = world["student_id"], world["difficulty_id"]
            for grade in ("High", "Medium", "Medium", "Low"):
                await ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, grade)
            await ledger.record_evidence(db, s, d, EvidenceSource.REINFORCEMENT_SESSION, 95.0)
            events = await ledger.get_history(db, student_id=s, difficulty_id=d)
            record = await store.get_record(db, s, d)
            await db.close()
            return events, record

        events, record = asyncio.run(scenario())
        assert len(events) == 5
        assert [e["new_grade"] for e in events] == ["High", "Medium", "Medium", "Low", "None"]
        for earlier, later in zip(events, events[1:]):
            assert later["previous_grade"] == earlier["new_grade"]
        assert [e["trend"] for e in events] == [
            "worsened", "improved", "unchanged", "improved", "improved",
        ]
        assert record["grade"] == ledger.fold_history(events).value
        assert record["version"] == 5

    def test_keys_are_independent(self):
        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            await ledger.record_evidence(
                db, world["student_id"], world["difficulty_id"], EvidenceSource.GAMEPLAY, "High"
            )
            await ledger.record_evidence(
                db, world["other_student_id"], world["difficulty_id"], EvidenceSource.GAMEPLAY, "Low"
            )
            event = await ledger.record_evidence(
                db, world["student_id"], world["other_difficulty_id"], EvidenceSource.GAMEPLAY, "Medium"
            )
            await db.close()
            return event

        assert asyncio.run(scenario()).previous_grade == Grade.NONE

    def test_concurrent_writes_for_one_key_serialize(self):
        grades = ["High", "Low", "Medium", "None", "High", "Low"]

        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            s, d = world["student_id"], world["difficulty_id"]
            await asyncio.gather(*[
                ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, g) for g in grades
            ])
            events = await ledger.get_history(db, student_id=s, difficulty_id=d)
            cursor = await db.execute(
                "SELECT COUNT(*) AS n FROM difficulty_records WHERE student_id = ? AND difficulty_id = ?",
                (s, d),
            )
            records = (await cursor.fetchone())["n"]
            record = await store.get_record(db, s, d)
            await db.close()
            return events, records, record

        events, records, record = asyncio.run(scenario())
        assert len(events) == len(grades)
        assert records == 1
        assert events[0]["previous_grade"] == "None"
        for earlier, later in zip(events, events[1:]):
            assert later["previous_grade"] == earlier["new_grade"]
        assert record["grade"] == events[-1]["new_grade"]
        assert record["version"] == len(grades)

    def test_conflict_is_retried(self, monkeypatch):
        calls = {"n": 0}
        real_update = store.update_record

        async def flaky_update(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                return 0
            return await real_update(*args, **kwargs)

        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            s, d = world["student_id"], world["difficulty_id"]
            await ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, "High")
            monkeypatch.setattr(store, "update_record", flaky_update)
            event = await ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, "Low")
            events = await ledger.get_history(db, student_id=s, difficulty_id=d)
            await db.close()
            return event, events

        event, events = asyncio.run(scenario())
        assert calls["n"] == 2
        assert event.previous_grade == Grade.HIGH
        # The losing attempt's event was rolled back
        assert [e["new_grade"] for e in events] == ["High", "Low"]

    def test_conflict_surfaces_when_retries_run_out(self, monkeypatch):
        async def always_stale(*args, **kwargs):
            return 0

        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            s, d = world["student_id"], world["difficulty_id"]
            await ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, "High")
            monkeypatch.setattr(store, "update_record", always_stale)
            with pytest.raises(ConcurrencyConflict):
                await ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, "Low")
            events = await ledger.get_history(db, student_id=s, difficulty_id=d)
            record = await store.get_record(db, s, d)
            await db.close()
            return events, record

        events, record = asyncio.run(scenario())
        assert len(events) == 1
        assert record["grade"] == "High"


class TestListeners:

    def test_listeners_run_after_commit(self):
        seen = []

        async def listener(db, event):
            record = await store.get_record(db, event.student_id, event.difficulty_id)
            seen.append((event.new_grade, record["grade"]))

        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            ledger.subscribe(listener)
            try:
                await ledger.record_evidence(
                    db, world["student_id"], world["difficulty_id"], EvidenceSource.GAMEPLAY, "Medium"
                )
            finally:
                ledger.unsubscribe(listener)
            await db.close()

        asyncio.run(scenario())
        assert seen == [(Grade.MEDIUM, "Medium")]

    def test_listener_errors_propagate(self):
        async def broken(db, event):
            raise RuntimeError("listener down")

        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            ledger.subscribe(broken)
            try:
                with pytest.raises(RuntimeError):
                    await ledger.record_evidence(
                        db, world["student_id"], world["difficulty_id"], EvidenceSource.GAMEPLAY, "Low"
                    )
            finally:
                ledger.unsubscribe(broken)
            # The event itself was committed before the listener ran
            grade = await ledger.get_current_grade(db, world["student_id"], world["difficulty_id"])
            await db.close()
            return grade

        assert asyncio.run(scenario()) == Grade.LOW


class TestReadModels:

    def test_history_filters(self):
        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            s, d = world["student_id"], world["difficulty_id"]
            await ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, "High")
            await ledger.record_evidence(db, s, d, EvidenceSource.REINFORCEMENT_SESSION, 65)
            await ledger.record_evidence(
                db, world["other_student_id"], d, EvidenceSource.GAMEPLAY, "Low"
            )
            gameplay = await ledger.get_history(db, difficulty_id=d, source=EvidenceSource.GAMEPLAY)
            sessions = await ledger.get_history(db, source="ReinforcementSession")
            future = await ledger.get_history(db, date_from=datetime.now(timezone.utc) + timedelta(days=1))
            await db.close()
            return gameplay, sessions, future

        gameplay, sessions, future = asyncio.run(scenario())
        assert len(gameplay) == 2
        assert [(e["previous_grade"], e["new_grade"]) for e in sessions] == [("High", "Low")]
        assert future == []

    def test_records_as_of(self):
        t0 = datetime(2026, 3, 1, 9, 0, 0)

        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            s, d = world["student_id"], world["difficulty_id"]
            await ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, "High", recorded_at=t0)
            await ledger.record_evidence(
                db, s, d, EvidenceSource.GAMEPLAY, "Low", recorded_at=t0 + timedelta(days=2)
            )
            await ledger.record_evidence(
                db, world["other_student_id"], d, EvidenceSource.GAMEPLAY, "Medium",
                recorded_at=t0 + timedelta(days=3),
            )
            before = await ledger.get_records_as_of(db, t0 - timedelta(hours=1))
            day_one = await ledger.get_records_as_of(db, t0 + timedelta(days=1))
            later = await ledger.get_records_as_of(db, t0 + timedelta(days=5))
            await db.close()
            return world, before, day_one, later

        world, before, day_one, later = asyncio.run(scenario())
        assert before == []
        assert [(r["student_id"], r["grade"]) for r in day_one] == [(world["student_id"], "High")]
        assert {r["student_id"]: r["grade"] for r in later} == {
            world["student_id"]: "Low",
            world["other_student_id"]: "Medium",
        }

    def test_backdated_event_does_not_reorder_history(self):
        t0 = datetime(2026, 3, 1, 9, 0, 0)

        async def scenario():
            db = await setup_test_db()
            world = await create_world(db)
            s, d = world["student_id"], world["difficulty_id"]
            await ledger.record_evidence(db, s, d, EvidenceSource.GAMEPLAY, "High", recorded_at=t0)
            await ledger.record_evidence(
                db, s, d, EvidenceSource.GAMEPLAY, "Low", recorded_at=t0 - timedelta(days=1)
            )
            events = await ledger.get_history(db, student_id=s, difficulty_id=d)
            record = await store.get_record(db, s, d)
            await db.close()
            return events, record

        events, record = asyncio.run(scenario())
        assert [e["new_grade"] for e in events] == ["High", "Low"]
        assert record["grade"] == "Low"
