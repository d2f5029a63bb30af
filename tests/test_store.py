"""
Tests for the session stores.

Covers:
- One session per student
- JSON file layout and reload
- Access code rotation
- Write failures
- Orphan student claims
"""

import json
import os
import time
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from exam_engine.errors import AlreadyCompleted, SessionAlreadyActive
from exam_engine.grader import Grader
from exam_engine.models import ExamSession, Phase, Violation
from exam_engine.orchestrator import SessionOrchestrator
from exam_engine.store import STALE_CLAIM_SECONDS, JsonFileStore, MemoryStore, StoreError


def make_session(bank, session_id="sess-1", student_id="s1"):
    now = datetime(2025, 1, 1, 9, 0, 0)
    return ExamSession(
        id=session_id,
        student_id=student_id,
        student_name="Ali Khan",
        roll_number="101",
        section="A",
        class_name="9th",
        questions=bank.questions[:2],
        mcq_questions=bank.mcq_questions[:3],
        start_time=now,
        deadline=now + timedelta(minutes=90),
    )


@pytest.fixture(params=["memory", "json"])
def any_store(request, bank, tmp_path):
    if request.param == "memory":
        return MemoryStore(bank)
    return JsonFileStore(tmp_path, bank)


class TestBankLookups:
    """Test read access to the bank."""

    def test_students(self, store):
        assert store.get_student("s1").name == "Ali Khan"
        assert store.get_student("missing") is None
        assert len(store.list_students()) == 4

    def test_questions_by_class(self, store):
        assert [q.id for q in store.questions_for_class("9th")] == ["q1", "q2"]
        assert [q.id for q in store.questions_for_class("10th")] == ["q3"]
        assert len(store.mcq_questions_for_class("9th")) == 10
        assert store.mcq_questions_for_class("10th") == []

    def test_class_section_is_a_copy(self, store):
        section = store.get_class_section("9th", "A")
        section.access_code = "CHANGED"

        assert store.get_class_section("9th", "A").access_code == "ALPHA"
        assert store.get_class_section("9th", "Z") is None

    def test_update_unknown_section(self, store):
        with pytest.raises(KeyError):
            store.update_access_code("12th", "A", "X")


class TestSessions:
    """Test behaviour shared by every store."""

    def test_create_and_get(self, any_store, bank):
        session = make_session(bank)
        any_store.create_session(session)

        loaded = any_store.get_session("sess-1")
        assert loaded.student_id == "s1"
        assert [q.id for q in loaded.questions] == ["q1", "q2"]
        assert loaded.deadline == session.deadline
        assert loaded.current_phase is Phase.CODING

    def test_get_missing(self, any_store):
        assert any_store.get_session("nope") is None

    def test_snapshot_not_live(self, any_store, bank):
        session = make_session(bank)
        any_store.create_session(session)
        session.answers["q1"] = "print(1)"

        assert any_store.get_session("sess-1").answers == {}

    def test_one_session_per_student(self, any_store, bank):
        any_store.create_session(make_session(bank))

        with pytest.raises(SessionAlreadyActive):
            any_store.create_session(make_session(bank, session_id="sess-2"))
        assert len(any_store.sessions_for_student("s1")) == 1

    def test_completed_student_rejected(self, any_store, bank):
        session = make_session(bank)
        any_store.create_session(session)
        session.current_phase = Phase.COMPLETED
        session.is_submitted = True
        any_store.save_session(session)

        with pytest.raises(AlreadyCompleted):
            any_store.create_session(make_session(bank, session_id="sess-2"))

    def test_save_and_results(self, any_store, bank):
        session = make_session(bank)
        any_store.create_session(session)
        session.answers["q1"] = "print(8)"
        session.mcq_answers["m1"] = 2
        session.violations.append(Violation("focus_lost", session.start_time, "coding"))
        session.total_score = 76
        any_store.save_session(session)
        any_store.record_result(session)

        loaded = any_store.get_session("sess-1")
        assert loaded.answers == {"q1": "print(8)"}
        assert loaded.mcq_answers == {"m1": 2}
        assert loaded.violations[0].kind == "focus_lost"
        assert [r.total_score for r in any_store.list_results()] == [76]

    def test_record_result_is_upsert(self, any_store, bank):
        session = make_session(bank)
        any_store.create_session(session)
        any_store.record_result(session)
        session.total_score = 90
        any_store.record_result(session)

        assert [r.total_score for r in any_store.list_results()] == [90]


class TestJsonFileStore:
    """Test the directory-backed store."""

    def test_layout(self, tmp_path, bank):
        store = JsonFileStore(tmp_path, bank)
        store.create_session(make_session(bank))

        assert (tmp_path / "sessions" / "sess-1.json").exists()
        assert (tmp_path / "students" / "s1.lock").read_text() == "sess-1"
        data = json.loads((tmp_path / "sessions" / "sess-1.json").read_text())
        assert data["class"] == "9th"
        assert data["current_phase"] == "coding"

    def test_claim_shared_between_instances(self, tmp_path, bank):
        """Two processes pointing at one directory still allow a single session."""
        JsonFileStore(tmp_path, bank).create_session(make_session(bank))

        with pytest.raises(SessionAlreadyActive):
            JsonFileStore(tmp_path, bank).create_session(make_session(bank, session_id="sess-2"))

    def test_reload_sessions(self, tmp_path, bank):
        JsonFileStore(tmp_path, bank).create_session(make_session(bank))
        JsonFileStore(tmp_path, bank).create_session(make_session(bank, "sess-2", "s2"))

        reloaded = JsonFileStore(tmp_path, bank)
        assert sorted(s.id for s in reloaded.list_sessions()) == ["sess-1", "sess-2"]
        assert [s.id for s in reloaded.sessions_for_student("s2")] == ["sess-2"]

    def test_rotated_code_survives_restart(self, tmp_path, bank):
        JsonFileStore(tmp_path, bank).update_access_code("9th", "A", "NEWCODE")

        reloaded = JsonFileStore(tmp_path, bank)
        assert reloaded.get_class_section("9th", "A").access_code == "NEWCODE"
        assert reloaded.get_class_section("10th", "B").access_code == "BRAVO"

    def test_failed_create_releases_claim(self, tmp_path, bank):
        store = JsonFileStore(tmp_path, bank)

        with patch("exam_engine.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StoreError):
                store.create_session(make_session(bank))

        assert not (tmp_path / "students" / "s1.lock").exists()
        store.create_session(make_session(bank))
        assert store.get_session("sess-1") is not None

    def test_failed_save_raises_store_error(self, tmp_path, bank):
        store = JsonFileStore(tmp_path, bank)
        session = make_session(bank)
        store.create_session(session)

        with patch("exam_engine.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StoreError, match="disk full"):
                store.save_session(session)

    def test_corrupt_session_file(self, tmp_path, bank):
        store = JsonFileStore(tmp_path, bank)
        (tmp_path / "sessions" / "broken.json").write_text("{not json")

        with pytest.raises(StoreError):
            store.get_session("broken")


class TestOrphanClaims:
    """A claim left by a process that died before writing its session."""

    def orphan(self, tmp_path, age_seconds):
        claim = tmp_path / "students" / "s1.lock"
        claim.write_text("sess-lost")
        stamp = time.time() - age_seconds
        os.utime(claim, (stamp, stamp))
        return claim

    def test_stale_orphan_is_reclaimed(self, tmp_path, bank):
        store = JsonFileStore(tmp_path, bank)
        claim = self.orphan(tmp_path, STALE_CLAIM_SECONDS + 60)

        store.create_session(make_session(bank))

        assert claim.read_text() == "sess-1"
        assert store.get_session("sess-1") is not None

    def test_fresh_orphan_still_blocks(self, tmp_path, bank):
        """A concurrent creator may be about to write its session file."""
        store = JsonFileStore(tmp_path, bank)
        claim = self.orphan(tmp_path, 1)

        with pytest.raises(SessionAlreadyActive, match="being created"):
            store.create_session(make_session(bank))
        assert claim.read_text() == "sess-lost"

    def test_old_claim_with_session_is_kept(self, tmp_path, bank):
        store = JsonFileStore(tmp_path, bank)
        store.create_session(make_session(bank))
        claim = tmp_path / "students" / "s1.lock"
        stamp = time.time() - STALE_CLAIM_SECONDS * 10
        os.utime(claim, (stamp, stamp))

        with pytest.raises(SessionAlreadyActive, match="in progress"):
            store.create_session(make_session(bank, session_id="sess-2"))
        assert claim.read_text() == "sess-1"

    def test_orchestrator_starts_after_orphan(self, tmp_path, bank, config, executor, clock):
        store = JsonFileStore(tmp_path, bank)
        self.orphan(tmp_path, STALE_CLAIM_SECONDS + 1)
        orchestrator = SessionOrchestrator(store, Grader(config, executor), config, clock=clock)

        handle = orchestrator.start_exam("s1", "ALPHA")

        assert store.get_session(handle.session_id).student_id == "s1"
        orchestrator.shutdown()
