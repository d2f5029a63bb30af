"""
Session orchestration: the per-student exam state machine.

SessionOrchestrator owns every active ExamSession. All mutations go through
its methods and run under that session's lock, so answer saves, integrity
events, phase submissions and the countdown never interleave on one session.
Sessions of different students never share a lock.
"""

import hashlib
import random
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from .clock import Clock, SystemClock, TimerHandle
from .errors import (
    ExecutionError, InvalidAccessCode, InvalidPhase, OptionOutOfRange, PersistenceError,
    SessionAlreadyActive, SessionNotFound, StudentNotFound, UnknownQuestion, ValidationError,
    AlreadyCompleted, ExamError,
)
from .grader import Grader
from .integrity import EventKind, IntegrityMonitor
from .models import EvaluationResult, ExamConfig, ExamSession, Phase, Question, Student, round_half_up
from .store import Store


@dataclass
class SessionHandle:
    """What a student receives on a successful start. Hidden tests and MCQ keys are stripped."""
    session_id: str
    deadline: object
    questions: List[Question] = field(default_factory=list)
    mcq_questions: List[dict] = field(default_factory=list)


@dataclass
class Ack:
    session_id: str
    persisted: bool = True


class SessionOrchestrator:
    """Runs exam sessions from access check to final score."""

    def __init__(
        self,
        store: Store,
        grader: Grader,
        config: ExamConfig,
        clock: Optional[Clock] = None,
        monitor: Optional[IntegrityMonitor] = None,
        rng: Optional[random.Random] = None,
        session_logger: Optional[Callable[[str, str], None]] = None,
    ):
        self.store = store
        self.grader = grader
        self.config = config
        self.clock = clock or SystemClock()
        self.monitor = monitor or IntegrityMonitor(config.violation_warning_threshold, self.clock)
        self.session_logger = session_logger
        self._rng = rng
        self._default_rng = random.Random()

        self._sessions: Dict[str, ExamSession] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._pending_sync: Set[str] = set()
        self._warning_listeners: List[Callable[[str, str], None]] = []

        # Guards the session table; StartExam's check-then-create runs under it
        self._table_lock = threading.Lock()

    # ===== HELPER FUNCTIONS =====

    def log(self, event: str, details: str = ""):
        """Forward to the session logger. A failing logger never aborts an exam operation."""
        if not self.session_logger:
            return
        try:
            self.session_logger(event, details)
        except Exception as e:
            print(f"Warning: could not log {event}: {e}", file=sys.stderr)

    def add_warning_listener(self, listener: Callable[[str, str], None]):
        """Register a callback(session_id, message) for persistence warnings."""
        self._warning_listeners.append(listener)

    def _get(self, session_id: str) -> Tuple[ExamSession, threading.RLock]:
        with self._table_lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session, self._locks[session_id]

        stored = self.store.get_session(session_id)
        if stored is None:
            raise SessionNotFound(f"Exam session '{session_id}' not found")
        return self._adopt(stored)

    def _adopt(self, session: ExamSession) -> Tuple[ExamSession, threading.RLock]:
        """Take ownership of a session loaded from the store, arming its countdown."""
        with self._table_lock:
            if session.id in self._sessions:
                return self._sessions[session.id], self._locks[session.id]
            self._sessions[session.id] = session
            lock = self._locks[session.id] = threading.RLock()

        if not session.is_terminal:
            with lock:
                self._arm_timer(session, (session.deadline - self.clock.now()).total_seconds())
        return session, lock

    def _rng_for(self, student: Student) -> random.Random:
        if self._rng is not None:
            return self._rng
        if self.config.deterministic_assignment:
            exam_date = self.clock.now().astimezone().strftime("%Y-%m-%d")
            seed_string = f"{student.id}{student.class_name}{student.section}{exam_date}"
            return random.Random(int(hashlib.sha256(seed_string.encode()).hexdigest(), 16))
        return self._default_rng

    def _persist(self, session: ExamSession) -> bool:
        """
        Save the session; on failure keep it in memory and warn.

        Returns:
            True if the Store accepted the write
        """
        try:
            self.store.save_session(session)
            if session.is_terminal:
                self.store.record_result(session)
        except PersistenceError as e:
            self._pending_sync.add(session.id)
            self.log("PERSISTENCE_ERROR", f"Session: {session.id}, Error: {e.message}")
            for listener in self._warning_listeners:
                listener(session.id, e.message)
            return False

        self._pending_sync.discard(session.id)
        return True

    @staticmethod
    def _advance(session: ExamSession, expected: Phase):
        """Move one phase forward; anything but the expected phase is rejected."""
        if session.current_phase is not expected:
            raise InvalidPhase(
                f"Cannot submit the {expected.value} section while the exam is in the "
                f"{session.current_phase.value} phase"
            )
        session.current_phase = expected.next()

    def _check_time(self, session: ExamSession):
        if self.clock.now() >= session.deadline:
            raise InvalidPhase("Exam time is over; answers can no longer be changed")

    # ===== TIMER =====

    def _arm_timer(self, session: ExamSession, delay_seconds: float):
        previous = self._timers.pop(session.id, None)
        if previous:
            previous.cancel()
        session_id = session.id
        self._timers[session_id] = self.clock.schedule(
            max(delay_seconds, 0.0), lambda: self._on_timeout(session_id)
        )

    def _cancel_timer(self, session_id: str):
        handle = self._timers.pop(session_id, None)
        if handle:
            handle.cancel()

    def _on_timeout(self, session_id: str):
        """
        Countdown reached zero: submit every open section through the normal path.

        The deadline covers the whole exam, so a coding timeout completes the
        MCQ section too.
        """
        timed_out = []
        try:
            session, lock = self._get(session_id)
            with lock:
                self._timers.pop(session_id, None)
                if session.current_phase is Phase.CODING:
                    self._submit_coding(session)
                    timed_out.append("CODING_TIMEOUT")
                if session.current_phase is Phase.MCQ:
                    self._submit_mcq(session)
                    timed_out.append("EXAM_TIMEOUT")
        except ExamError as e:
            self.log("TIMEOUT_ERROR", f"Session: {session_id}, Error: {e.message}")
        except Exception as e:
            self.log("TIMEOUT_ERROR", f"Session: {session_id}, Error: {e}")

        for event in timed_out:
            self.log(event, f"Session: {session_id} - section auto-submitted at the deadline")

    # ===== EXAM LIFECYCLE =====

    def start_exam(self, student_id: str, access_code: str) -> SessionHandle:
        """
        Validate access and create a session in the coding phase.

        Raises:
            StudentNotFound, AlreadyCompleted, SessionAlreadyActive,
            InvalidAccessCode, PersistenceError
        """
        with self._table_lock:
            student = self.store.get_student(student_id)
            if student is None:
                raise StudentNotFound(f"Student '{student_id}' not found")

            existing = [s for s in self._sessions.values() if s.student_id == student_id]
            existing += self.store.sessions_for_student(student_id)
            if any(s.is_submitted for s in existing):
                raise AlreadyCompleted("You have already completed this exam. Multiple attempts are not allowed.")
            if existing:
                raise SessionAlreadyActive("An exam session is already in progress for this student.")

            class_section = self.store.get_class_section(student.class_name, student.section)
            if class_section is None or class_section.access_code != access_code:
                raise InvalidAccessCode("Invalid access code for your class and section.")

            rng = self._rng_for(student)
            coding_pool = self.store.questions_for_class(student.class_name)
            mcq_pool = self.store.mcq_questions_for_class(student.class_name)
            questions = rng.sample(coding_pool, min(self.config.coding_question_count, len(coding_pool)))
            mcq_questions = rng.sample(mcq_pool, min(self.config.mcq_question_count, len(mcq_pool)))

            duration = class_section.duration_minutes or self.config.default_duration_minutes
            now = self.clock.now()
            session = ExamSession(
                id=str(uuid.uuid4()),
                student_id=student.id,
                student_name=student.name,
                roll_number=student.roll_number,
                section=student.section,
                class_name=student.class_name,
                questions=questions,
                mcq_questions=mcq_questions,
                start_time=now,
                deadline=now + timedelta(minutes=duration),
            )

            # Durable before the student can act on it; failures propagate
            self.store.create_session(session)

            self._sessions[session.id] = session
            lock = self._locks[session.id] = threading.RLock()

        with lock:
            self._arm_timer(session, duration * 60)

        self.log(
            "SESSION_START",
            f"Session: {session.id}, Student: {student.name} ({student.roll_number}), "
            f"Class: {student.class_name}-{student.section}, Duration: {duration} minutes, "
            f"Assigned: {', '.join(q.id for q in questions)}"
        )

        return SessionHandle(
            session_id=session.id,
            deadline=session.deadline,
            questions=[q.visible_copy() for q in questions],
            mcq_questions=[
                {"id": q.id, "question": q.question, "options": list(q.options)}
                for q in mcq_questions
            ],
        )

    def submit_answer(self, session_id: str, question_id: str, code: str) -> Ack:
        """Save (overwrite) the code for one coding question."""
        session, lock = self._get(session_id)
        with lock:
            if session.current_phase is not Phase.CODING:
                raise InvalidPhase("Coding answers can only be changed during the coding section")
            if session.get_question(question_id) is None:
                raise UnknownQuestion(f"Question '{question_id}' is not part of this exam")
            self._check_time(session)

            session.answers[question_id] = code
            persisted = self._persist(session)

        self.log("ANSWER_SAVED", f"Session: {session_id}, Question: {question_id}, Length: {len(code)}")
        return Ack(session_id, persisted)

    def submit_mcq_answer(self, session_id: str, question_id: str, option_index: int) -> Ack:
        """Save (overwrite) the chosen option for one MCQ question."""
        session, lock = self._get(session_id)
        with lock:
            if session.is_terminal:
                raise InvalidPhase("The exam has already been submitted")
            question = session.get_mcq_question(question_id)
            if question is None:
                raise UnknownQuestion(f"Question '{question_id}' is not part of this exam")
            if not isinstance(option_index, int) or not 0 <= option_index < len(question.options):
                raise OptionOutOfRange(f"Option must be between 0 and {len(question.options) - 1}")
            self._check_time(session)

            session.mcq_answers[question_id] = option_index
            persisted = self._persist(session)

        self.log("MCQ_ANSWER_SAVED", f"Session: {session_id}, Question: {question_id}, Option: {option_index}")
        return Ack(session_id, persisted)

    def submit_coding_section(self, session_id: str) -> int:
        """Grade every coding question and move to the MCQ phase. Returns the coding score."""
        session, lock = self._get(session_id)
        with lock:
            return self._submit_coding(session)

    def _submit_coding(self, session: ExamSession) -> int:
        if session.current_phase is not Phase.CODING:
            raise InvalidPhase("The coding section has already been submitted")

        results: Dict[str, EvaluationResult] = {}
        for question in session.questions:
            code = session.answers.get(question.id, "")
            try:
                results[question.id] = self.grader.evaluate(question, code)
            except ExecutionError as e:
                results[question.id] = EvaluationResult(
                    question_id=question.id,
                    code=code,
                    test_results=[],
                    score=0,
                    total_tests=len(question.test_cases),
                    passed_tests=0,
                    has_error=True,
                    error_message=e.message,
                )

        scores = [r.score for r in results.values()]
        coding_score = round_half_up(sum(scores) / len(scores)) if scores else 0

        self._advance(session, Phase.CODING)
        session.results = results
        session.coding_score = coding_score
        session.coding_end_time = self.clock.now()
        self.monitor.apply_phase_dampening(session)
        self._persist(session)

        self.log(
            "CODING_SUBMITTED",
            f"Session: {session.id}, Coding Score: {coding_score}, "
            + ", ".join(f"{qid}: {r.passed_tests}/{r.total_tests}" for qid, r in results.items())
        )
        return coding_score

    def submit_mcq_section(self, session_id: str) -> int:
        """Grade the MCQs, compute the total and complete the exam. Returns the total score."""
        session, lock = self._get(session_id)
        with lock:
            return self._submit_mcq(session)

    def _submit_mcq(self, session: ExamSession) -> int:
        if session.current_phase is not Phase.MCQ:
            raise InvalidPhase(
                "The MCQ section has already been submitted" if session.is_terminal
                else "Submit the coding section first"
            )

        mcq_results: Dict[str, bool] = {}
        for question in session.mcq_questions:
            mcq_results[question.id] = session.mcq_answers.get(question.id) == question.correct_answer

        correct = sum(1 for ok in mcq_results.values() if ok)
        mcq_score = round_half_up(correct / len(mcq_results) * 100) if mcq_results else 0

        self._advance(session, Phase.MCQ)
        session.mcq_results = mcq_results
        session.mcq_score = mcq_score
        session.total_score = self.config.total_score(session.coding_score, mcq_score)
        session.end_time = self.clock.now()
        session.is_submitted = True
        self.monitor.apply_phase_dampening(session)
        self._cancel_timer(session.id)
        self._persist(session)

        self.log(
            "EXAM_FINISH",
            f"Session: {session.id}, Coding: {session.coding_score}, MCQ: {mcq_score}, "
            f"Total Score: {session.total_score}, Exit Attempts: {session.exit_attempts}"
        )
        return session.total_score

    def report_integrity_event(self, session_id: str, kind) -> int:
        """Count a proctoring violation. Returns the session's exit attempts."""
        try:
            kind = EventKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown integrity event '{kind}'") from None

        session, lock = self._get(session_id)
        with lock:
            notice = self.monitor.record(session, kind)
            if notice is not None:
                self._persist(session)
            exit_attempts = session.exit_attempts

        if notice is not None:
            self.log(
                "INTEGRITY_VIOLATION",
                f"Session: {session_id}, Event: {kind.value}, Exit Attempts: {exit_attempts}"
            )
        return exit_attempts

    # ===== QUERIES =====

    def get_session(self, session_id: str) -> ExamSession:
        session, _ = self._get(session_id)
        return session

    def active_session_for(self, student_id: str) -> Optional[ExamSession]:
        with self._table_lock:
            for session in self._sessions.values():
                if session.student_id == student_id and not session.is_terminal:
                    return session
        return None

    def remaining_seconds(self, session_id: str) -> int:
        """Read-only projection of the authoritative countdown."""
        session, lock = self._get(session_id)
        with lock:
            if session.is_terminal:
                return 0
            remaining = (session.deadline - self.clock.now()).total_seconds()
        return max(int(remaining), 0)

    @property
    def pending_sync(self) -> Set[str]:
        return set(self._pending_sync)

    # ===== RECOVERY =====

    def flush_pending(self) -> Set[str]:
        """Retry saving sessions whose last write failed. Returns those still unsaved."""
        for session_id in list(self._pending_sync):
            session, lock = self._get(session_id)
            with lock:
                self._persist(session)
        return self.pending_sync

    def recover(self) -> int:
        """Re-adopt open sessions from the store after a restart. Returns how many."""
        recovered = 0
        for session in self.store.list_sessions():
            if session.is_terminal:
                continue
            with self._table_lock:
                known = session.id in self._sessions
            if known:
                continue
            self._adopt(session)
            recovered += 1
            self.log(
                "SESSION_RECOVERED",
                f"Session: {session.id}, Phase: {session.current_phase.value}, "
                f"Deadline: {session.deadline.astimezone().strftime('%H:%M:%S')}"
            )
        return recovered

    def shutdown(self):
        """Cancel every pending countdown."""
        with self._table_lock:
            session_ids = list(self._timers)
        for session_id in session_ids:
            self._cancel_timer(session_id)
