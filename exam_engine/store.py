"""
Persistence for the exam engine.

Store is the contract the orchestrator depends on. Roster, questions and
class sections come from a loaded Bank and are read-mostly; sessions and the
results collection are written as the exam progresses.

- MemoryStore keeps everything in process (tests, single-run demos).
- JsonFileStore writes one JSON document per session under a data directory,
  so an interrupted exam can be resumed after a restart.
"""

import copy
import json
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .errors import PersistenceError, AlreadyCompleted, SessionAlreadyActive
from .models import Bank, Student, Question, MCQQuestion, ClassSection, ExamSession


# A claim without a session file older than this is left over from a crash
STALE_CLAIM_SECONDS = 30


class StoreError(PersistenceError):
    """Raised by Store implementations when a read or write fails."""


class Store:
    """Read access to the bank plus read/write access to sessions."""

    def __init__(self, bank: Bank):
        self.bank = bank
        self._sections: Dict[tuple, ClassSection] = {
            (cs.class_name, cs.section): copy.copy(cs) for cs in bank.class_sections
        }
        self._bank_lock = threading.Lock()

    # ===== BANK =====

    def get_student(self, student_id: str) -> Optional[Student]:
        for student in self.bank.students:
            if student.id == student_id:
                return student
        return None

    def list_students(self) -> List[Student]:
        return list(self.bank.students)

    def questions_for_class(self, class_name: str) -> List[Question]:
        return [q for q in self.bank.questions if q.class_name == class_name]

    def mcq_questions_for_class(self, class_name: str) -> List[MCQQuestion]:
        return [q for q in self.bank.mcq_questions if q.class_name == class_name]

    def get_class_section(self, class_name: str, section: str) -> Optional[ClassSection]:
        with self._bank_lock:
            found = self._sections.get((class_name, section))
            return copy.copy(found) if found else None

    def list_class_sections(self) -> List[ClassSection]:
        with self._bank_lock:
            return [copy.copy(cs) for cs in self._sections.values()]

    def update_access_code(self, class_name: str, section: str, access_code: str) -> ClassSection:
        """Rotate an access code. Sessions already started are unaffected."""
        with self._bank_lock:
            found = self._sections.get((class_name, section))
            if found is None:
                raise KeyError(f"No class section {class_name}-{section}")
            found.access_code = access_code
            self._persist_sections()
            return copy.copy(found)

    def _persist_sections(self):
        pass

    # ===== SESSIONS =====

    def create_session(self, session: ExamSession):
        """
        Insert a session, enforcing one session per student.

        Raises:
            AlreadyCompleted: The student already has a terminal session
            SessionAlreadyActive: The student already has an open session
            StoreError: The write failed
        """
        raise NotImplementedError

    def save_session(self, session: ExamSession):
        """Upsert a session keyed by its id."""
        raise NotImplementedError

    def get_session(self, session_id: str) -> Optional[ExamSession]:
        raise NotImplementedError

    def list_sessions(self) -> List[ExamSession]:
        raise NotImplementedError

    def sessions_for_student(self, student_id: str) -> List[ExamSession]:
        return [s for s in self.list_sessions() if s.student_id == student_id]

    def record_result(self, session: ExamSession):
        """Upsert a completed session into the results collection."""
        raise NotImplementedError

    def list_results(self) -> List[ExamSession]:
        raise NotImplementedError

    @staticmethod
    def _reject_existing(existing: ExamSession):
        if existing.is_submitted:
            raise AlreadyCompleted("You have already completed this exam. Multiple attempts are not allowed.")
        raise SessionAlreadyActive("An exam session is already in progress for this student.")


class MemoryStore(Store):
    """In-process store. Sessions are kept as serialized snapshots."""

    def __init__(self, bank: Bank):
        super().__init__(bank)
        self._lock = threading.Lock()
        self._sessions: Dict[str, dict] = {}
        self._by_student: Dict[str, str] = {}
        self._results: Dict[str, dict] = {}

    def create_session(self, session: ExamSession):
        with self._lock:
            existing_id = self._by_student.get(session.student_id)
            if existing_id is not None:
                self._reject_existing(ExamSession.from_dict(self._sessions[existing_id]))
            self._sessions[session.id] = session.to_dict()
            self._by_student[session.student_id] = session.id

    def save_session(self, session: ExamSession):
        with self._lock:
            self._sessions[session.id] = session.to_dict()
            self._by_student.setdefault(session.student_id, session.id)

    def get_session(self, session_id: str) -> Optional[ExamSession]:
        with self._lock:
            data = self._sessions.get(session_id)
        return ExamSession.from_dict(data) if data else None

    def list_sessions(self) -> List[ExamSession]:
        with self._lock:
            snapshots = list(self._sessions.values())
        return [ExamSession.from_dict(d) for d in snapshots]

    def record_result(self, session: ExamSession):
        with self._lock:
            self._results[session.id] = session.to_dict()

    def list_results(self) -> List[ExamSession]:
        with self._lock:
            snapshots = list(self._results.values())
        return [ExamSession.from_dict(d) for d in snapshots]


class JsonFileStore(Store):
    """
    Directory-backed store.

    Layout:
        sessions/<session_id>.json   one document per session
        students/<student_id>.lock   claims the student's single attempt
        results.json                 completed sessions keyed by id
        class_sections.json          rotated access codes
    """

    def __init__(self, data_dir: Path, bank: Bank):
        super().__init__(bank)
        self.data_dir = Path(data_dir)
        self.sessions_dir = self.data_dir / "sessions"
        self.claims_dir = self.data_dir / "students"
        self.results_path = self.data_dir / "results.json"
        self.sections_path = self.data_dir / "class_sections.json"
        self._lock = threading.Lock()

        try:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
            self.claims_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create data directory {self.data_dir}: {e}") from e

        self._load_sections()

    # ===== FILE HELPERS =====

    @staticmethod
    def _safe_name(value: str) -> str:
        return "".join(c if c.isalnum() or c in "-_" else '_' for c in value)

    def _write_json(self, path: Path, data):
        """Write via a temp file and rename so readers never see half a document."""
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreError(f"Failed to write {path.name}: {e}") from e

    def _read_json(self, path: Path, default=None):
        if not path.exists():
            return default
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read {path.name}: {e}") from e

    def _session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{self._safe_name(session_id)}.json"

    def _claim_path(self, student_id: str) -> Path:
        return self.claims_dir / f"{self._safe_name(student_id)}.lock"

    # ===== CLASS SECTIONS =====

    def _load_sections(self):
        for data in self._read_json(self.sections_path, default=[]):
            cs = ClassSection.from_dict(data)
            self._sections[(cs.class_name, cs.section)] = cs

    def _persist_sections(self):
        self._write_json(self.sections_path, [cs.to_dict() for cs in self._sections.values()])

    # ===== SESSIONS =====

    @staticmethod
    def _claim(claim_path: Path, session_id: str):
        # Exclusive create acts as a unique constraint, across processes too
        with open(claim_path, 'x', encoding='utf-8') as f:
            f.write(session_id)

    def _check_claim(self, claim_path: Path):
        """Raise unless the claim names no session and is older than STALE_CLAIM_SECONDS."""
        existing = self.get_session(claim_path.read_text(encoding='utf-8').strip())
        if existing is not None:
            self._reject_existing(existing)
        if time.time() - claim_path.stat().st_mtime < STALE_CLAIM_SECONDS:
            raise SessionAlreadyActive("An exam session is already being created for this student.")

    def create_session(self, session: ExamSession):
        with self._lock:
            claim_path = self._claim_path(session.student_id)
            try:
                try:
                    self._claim(claim_path, session.id)
                except FileExistsError:
                    self._check_claim(claim_path)
                    # Its creator died between claiming and writing the session
                    claim_path.unlink()
                    self._claim(claim_path, session.id)
            except FileExistsError:
                # Another process re-claimed the stale entry first
                raise SessionAlreadyActive("An exam session is already being created for this student.") from None
            except OSError as e:
                raise StoreError(f"Failed to claim session for student: {e}") from e

            try:
                self._write_json(self._session_path(session.id), session.to_dict())
            except StoreError:
                claim_path.unlink(missing_ok=True)
                raise

    def save_session(self, session: ExamSession):
        with self._lock:
            self._write_json(self._session_path(session.id), session.to_dict())

    def get_session(self, session_id: str) -> Optional[ExamSession]:
        data = self._read_json(self._session_path(session_id))
        return ExamSession.from_dict(data) if data else None

    def list_sessions(self) -> List[ExamSession]:
        sessions = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            data = self._read_json(path)
            if data:
                sessions.append(ExamSession.from_dict(data))
        return sessions

    def record_result(self, session: ExamSession):
        with self._lock:
            results = self._read_json(self.results_path, default={})
            results[session.id] = session.to_dict()
            self._write_json(self.results_path, results)

    def list_results(self) -> List[ExamSession]:
        results = self._read_json(self.results_path, default={})
        return [ExamSession.from_dict(d) for d in results.values()]
