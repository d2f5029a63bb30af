"""
Data models for the exam bank and exam sessions.

Provides type-safe structures for students, questions, class sections,
evaluation results and the ExamSession aggregate, plus the ExamConfig policy.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero (82.5 -> 83)."""
    return int(math.floor(value + 0.5 + 1e-9))


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Phase(str, Enum):
    """Stage of an exam session. Only ever advances coding -> mcq -> completed."""
    CODING = "coding"
    MCQ = "mcq"
    COMPLETED = "completed"

    def next(self) -> 'Phase':
        if self is Phase.CODING:
            return Phase.MCQ
        return Phase.COMPLETED


@dataclass
class Student:
    """A student on the roster."""
    id: str
    name: str
    roll_number: str
    class_name: str
    section: str
    created_at: Optional[datetime] = None

    @staticmethod
    def from_dict(data: dict) -> 'Student':
        return Student(
            id=str(data['id']),
            name=data['name'],
            roll_number=str(data.get('roll_number', '')),
            class_name=data['class'],
            section=data['section'],
            created_at=_parse_time(data.get('created_at')),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "roll_number": self.roll_number,
            "class": self.class_name,
            "section": self.section,
            "created_at": _format_time(self.created_at),
        }


@dataclass
class TestCase:
    """A single stdin/stdout test case. Hidden cases are graded but never shown."""
    id: str
    input: str
    expected_output: str
    hidden: bool = False

    __test__ = False  # not a pytest class

    @staticmethod
    def from_dict(data: dict) -> 'TestCase':
        return TestCase(
            id=str(data['id']),
            input=data.get('input', ''),
            expected_output=data['expected_output'],
            hidden=bool(data.get('hidden', False)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "input": self.input,
            "expected_output": self.expected_output,
            "hidden": self.hidden,
        }


@dataclass
class Question:
    """Represents a coding question."""
    id: str
    title: str
    description: str
    class_name: str
    difficulty: str
    test_cases: List[TestCase]
    sample_input: Optional[str] = None
    sample_output: Optional[str] = None

    @staticmethod
    def from_dict(data: dict) -> 'Question':
        """Create a Question from a dictionary. At least one test case is required."""
        test_cases = [TestCase.from_dict(t) for t in data.get('test_cases', [])]
        if not test_cases:
            raise ValueError(f"Question '{data.get('id')}' has no test cases")

        return Question(
            id=str(data['id']),
            title=data['title'],
            description=data.get('description', ''),
            class_name=data['class'],
            difficulty=data.get('difficulty', 'Medium'),
            test_cases=test_cases,
            sample_input=data.get('sample_input'),
            sample_output=data.get('sample_output'),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "class": self.class_name,
            "difficulty": self.difficulty,
            "test_cases": [t.to_dict() for t in self.test_cases],
            "sample_input": self.sample_input,
            "sample_output": self.sample_output,
        }

    def visible_copy(self) -> 'Question':
        """Return a copy with hidden test cases removed, for display to students."""
        return Question(
            id=self.id,
            title=self.title,
            description=self.description,
            class_name=self.class_name,
            difficulty=self.difficulty,
            test_cases=[t for t in self.test_cases if not t.hidden],
            sample_input=self.sample_input,
            sample_output=self.sample_output,
        )


@dataclass
class MCQQuestion:
    """A multiple-choice question with exactly four options."""
    id: str
    question: str
    options: List[str]
    correct_answer: int
    class_name: str
    difficulty: str = "Medium"

    @staticmethod
    def from_dict(data: dict) -> 'MCQQuestion':
        options = list(data['options'])
        if len(options) != 4:
            raise ValueError(f"MCQ '{data.get('id')}' must have exactly 4 options, got {len(options)}")

        correct = int(data['correct_answer'])
        if not 0 <= correct < len(options):
            raise ValueError(f"MCQ '{data.get('id')}' correct_answer {correct} is out of range")

        return MCQQuestion(
            id=str(data['id']),
            question=data['question'],
            options=options,
            correct_answer=correct,
            class_name=data['class'],
            difficulty=data.get('difficulty', 'Medium'),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "question": self.question,
            "options": list(self.options),
            "correct_answer": self.correct_answer,
            "class": self.class_name,
            "difficulty": self.difficulty,
        }


@dataclass
class ClassSection:
    """Access code and exam duration for one (class, section)."""
    class_name: str
    section: str
    access_code: str
    duration_minutes: int

    @staticmethod
    def from_dict(data: dict) -> 'ClassSection':
        return ClassSection(
            class_name=data['class'],
            section=data['section'],
            access_code=data['access_code'],
            duration_minutes=int(data.get('duration_minutes', 90)),
        )

    def to_dict(self) -> dict:
        return {
            "class": self.class_name,
            "section": self.section,
            "access_code": self.access_code,
            "duration_minutes": self.duration_minutes,
        }


@dataclass
class Bank:
    """Read-mostly data shared by every session: roster, questions, sections."""
    students: List[Student]
    questions: List[Question]
    mcq_questions: List[MCQQuestion]
    class_sections: List[ClassSection]

    @staticmethod
    def from_dict(data: dict) -> 'Bank':
        return Bank(
            students=[Student.from_dict(s) for s in data.get('students', [])],
            questions=[Question.from_dict(q) for q in data.get('questions', [])],
            mcq_questions=[MCQQuestion.from_dict(q) for q in data.get('mcq_questions', [])],
            class_sections=[ClassSection.from_dict(c) for c in data.get('class_sections', [])],
        )

    def to_dict(self) -> dict:
        return {
            "students": [s.to_dict() for s in self.students],
            "questions": [q.to_dict() for q in self.questions],
            "mcq_questions": [q.to_dict() for q in self.mcq_questions],
            "class_sections": [c.to_dict() for c in self.class_sections],
        }


@dataclass
class TestResult:
    """Outcome of running one submission against one test case."""
    test_case_id: str
    passed: bool
    actual_output: str
    expected_output: str
    execution_time_ms: int
    error: Optional[str] = None
    hidden: bool = False

    __test__ = False

    @staticmethod
    def from_dict(data: dict) -> 'TestResult':
        return TestResult(
            test_case_id=data['test_case_id'],
            passed=data['passed'],
            actual_output=data.get('actual_output', ''),
            expected_output=data.get('expected_output', ''),
            execution_time_ms=data.get('execution_time_ms', 0),
            error=data.get('error'),
            hidden=data.get('hidden', False),
        )

    def to_dict(self) -> dict:
        return {
            "test_case_id": self.test_case_id,
            "passed": self.passed,
            "actual_output": self.actual_output,
            "expected_output": self.expected_output,
            "execution_time_ms": self.execution_time_ms,
            "error": self.error,
            "hidden": self.hidden,
        }


@dataclass
class EvaluationResult:
    """Aggregated grading of one coding question."""
    question_id: str
    code: str
    test_results: List[TestResult]
    score: int
    total_tests: int
    passed_tests: int
    execution_time_ms: int = 0
    has_error: bool = False
    error_message: Optional[str] = None

    @staticmethod
    def from_dict(data: dict) -> 'EvaluationResult':
        return EvaluationResult(
            question_id=data['question_id'],
            code=data.get('code', ''),
            test_results=[TestResult.from_dict(t) for t in data.get('test_results', [])],
            score=data['score'],
            total_tests=data['total_tests'],
            passed_tests=data['passed_tests'],
            execution_time_ms=data.get('execution_time_ms', 0),
            has_error=data.get('has_error', False),
            error_message=data.get('error_message'),
        )

    def to_dict(self) -> dict:
        return {
            "question_id": self.question_id,
            "code": self.code,
            "test_results": [t.to_dict() for t in self.test_results],
            "score": self.score,
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "execution_time_ms": self.execution_time_ms,
            "has_error": self.has_error,
            "error_message": self.error_message,
        }


@dataclass
class Violation:
    """One recorded integrity event, kept for administrator review."""
    kind: str
    timestamp: datetime
    phase: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "timestamp": self.timestamp.isoformat(), "phase": self.phase}

    @staticmethod
    def from_dict(data: dict) -> 'Violation':
        return Violation(
            kind=data['kind'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            phase=data['phase'],
        )


@dataclass
class ExamSession:
    """
    A single student's exam attempt.

    The question sets are fixed at creation. Everything else is mutated only
    by SessionOrchestrator while holding the session's lock.
    """
    id: str
    student_id: str
    student_name: str
    roll_number: str
    section: str
    class_name: str
    questions: List[Question]
    mcq_questions: List[MCQQuestion]
    start_time: datetime
    deadline: datetime
    answers: Dict[str, str] = field(default_factory=dict)
    mcq_answers: Dict[str, int] = field(default_factory=dict)
    results: Dict[str, EvaluationResult] = field(default_factory=dict)
    mcq_results: Dict[str, bool] = field(default_factory=dict)
    coding_end_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_submitted: bool = False
    current_phase: Phase = Phase.CODING
    coding_score: int = 0
    mcq_score: int = 0
    total_score: int = 0
    exit_attempts: int = 0
    violations: List[Violation] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.current_phase is Phase.COMPLETED

    def get_question(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def get_mcq_question(self, question_id: str) -> Optional[MCQQuestion]:
        for question in self.mcq_questions:
            if question.id == question_id:
                return question
        return None

    def to_dict(self) -> dict:
        """Serialize the full session, enough to rebuild it after a restart."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "roll_number": self.roll_number,
            "section": self.section,
            "class": self.class_name,
            "questions": [q.to_dict() for q in self.questions],
            "mcq_questions": [q.to_dict() for q in self.mcq_questions],
            "answers": dict(self.answers),
            "mcq_answers": dict(self.mcq_answers),
            "results": {qid: r.to_dict() for qid, r in self.results.items()},
            "mcq_results": dict(self.mcq_results),
            "start_time": _format_time(self.start_time),
            "deadline": _format_time(self.deadline),
            "coding_end_time": _format_time(self.coding_end_time),
            "end_time": _format_time(self.end_time),
            "is_submitted": self.is_submitted,
            "current_phase": self.current_phase.value,
            "coding_score": self.coding_score,
            "mcq_score": self.mcq_score,
            "total_score": self.total_score,
            "exit_attempts": self.exit_attempts,
            "violations": [v.to_dict() for v in self.violations],
        }

    @staticmethod
    def from_dict(data: dict) -> 'ExamSession':
        return ExamSession(
            id=data['id'],
            student_id=data['student_id'],
            student_name=data.get('student_name', ''),
            roll_number=data.get('roll_number', ''),
            section=data.get('section', ''),
            class_name=data['class'],
            questions=[Question.from_dict(q) for q in data.get('questions', [])],
            mcq_questions=[MCQQuestion.from_dict(q) for q in data.get('mcq_questions', [])],
            start_time=_parse_time(data['start_time']),
            deadline=_parse_time(data['deadline']),
            answers=dict(data.get('answers', {})),
            mcq_answers={k: int(v) for k, v in data.get('mcq_answers', {}).items()},
            results={k: EvaluationResult.from_dict(v) for k, v in data.get('results', {}).items()},
            mcq_results=dict(data.get('mcq_results', {})),
            coding_end_time=_parse_time(data.get('coding_end_time')),
            end_time=_parse_time(data.get('end_time')),
            is_submitted=data.get('is_submitted', False),
            current_phase=Phase(data.get('current_phase', 'coding')),
            coding_score=data.get('coding_score', 0),
            mcq_score=data.get('mcq_score', 0),
            total_score=data.get('total_score', 0),
            exit_attempts=data.get('exit_attempts', 0),
            violations=[Violation.from_dict(v) for v in data.get('violations', [])],
        )


@dataclass
class ExamConfig:
    """
    Exam policy set by the teacher.

    Attributes:
        coding_question_count: Coding questions drawn per session
        mcq_question_count: MCQ questions drawn per session
        coding_weight: Weight of the coding score in the total
        mcq_weight: Weight of the MCQ score in the total
        default_duration_minutes: Duration used when a section has none
        test_time_limit_ms: Hard time limit for one test case run
        memory_limit_mb: Memory limit for one test case run (Unix only)
        violation_warning_threshold: Exit attempts at which notices turn severe
        deterministic_assignment: Seed question draws from the student identity
    """
    coding_question_count: int
    mcq_question_count: int
    coding_weight: float
    mcq_weight: float
    default_duration_minutes: int
    test_time_limit_ms: int
    memory_limit_mb: int
    violation_warning_threshold: int
    deterministic_assignment: bool

    @staticmethod
    def from_dict(data: dict) -> 'ExamConfig':
        """Create ExamConfig from dictionary."""
        return ExamConfig(
            coding_question_count=data.get('coding_question_count', 2),
            mcq_question_count=data.get('mcq_question_count', 10),
            coding_weight=float(data.get('coding_weight', 0.8)),
            mcq_weight=float(data.get('mcq_weight', 0.2)),
            default_duration_minutes=data.get('default_duration_minutes', 90),
            test_time_limit_ms=data.get('test_time_limit_ms', 2000),
            memory_limit_mb=data.get('memory_limit_mb', 256),
            violation_warning_threshold=data.get('violation_warning_threshold', 3),
            deterministic_assignment=bool(data.get('deterministic_assignment', False)),
        )

    def validate(self) -> tuple[bool, str]:
        """
        Validate configuration consistency.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if any(x < 0 for x in [self.coding_question_count, self.mcq_question_count,
                                self.coding_weight, self.mcq_weight,
                                self.violation_warning_threshold]):
            return False, "All values must be non-negative"

        if abs(self.coding_weight + self.mcq_weight - 1.0) > 0.0001:
            return False, f"Weights must add up to 1.0 ({self.coding_weight} + {self.mcq_weight})"

        if self.default_duration_minutes < 1 or self.default_duration_minutes > 480:
            return False, "Exam duration must be between 1 and 480 minutes (8 hours)"

        if self.test_time_limit_ms <= 0:
            return False, "Test time limit must be positive"

        if self.memory_limit_mb <= 0:
            return False, "Memory limit must be positive"

        return True, ""

    def total_score(self, coding_score: float, mcq_score: float) -> int:
        """Weighted total, always recomputed from the two section scores."""
        return round_half_up(coding_score * self.coding_weight + mcq_score * self.mcq_weight)

    @staticmethod
    def default() -> 'ExamConfig':
        """Return default configuration: 2 coding + 10 MCQ, weighted 80/20."""
        return ExamConfig.from_dict({})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coding_question_count": self.coding_question_count,
            "mcq_question_count": self.mcq_question_count,
            "coding_weight": self.coding_weight,
            "mcq_weight": self.mcq_weight,
            "default_duration_minutes": self.default_duration_minutes,
            "test_time_limit_ms": self.test_time_limit_ms,
            "memory_limit_mb": self.memory_limit_mb,
            "violation_warning_threshold": self.violation_warning_threshold,
            "deterministic_assignment": self.deterministic_assignment,
        }
