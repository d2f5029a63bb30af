"""
Shared fixtures: a small bank, a scripted executor and a manually driven clock.
"""

import random
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from exam_engine.clock import ManualClock
from exam_engine.grader import Grader
from exam_engine.models import Bank, ExamConfig
from exam_engine.orchestrator import SessionOrchestrator
from exam_engine.sandbox import CodeExecutor, ExecutionOutcome
from exam_engine.store import MemoryStore


def scripted_program(code: str, input_str: str) -> ExecutionOutcome:
    """
    Stand-in for running real code. The submission names a behaviour:

    ADD    prints the sum of the integers on stdin
    WRONG  always prints 0
    CRASH  fails with a ZeroDivisionError traceback
    LOOP   never finishes
    """
    behaviour = code.strip()
    if behaviour == "ADD":
        total = sum(int(x) for x in input_str.split())
        return ExecutionOutcome("success", f"{total}\n", "", 3)
    if behaviour == "WRONG":
        return ExecutionOutcome("success", "0\n", "", 3)
    if behaviour == "CRASH":
        stderr = (
            "Traceback (most recent call last):\n"
            '  File "solution.py", line 1, in <module>\n'
            "ZeroDivisionError: division by zero\n"
        )
        return ExecutionOutcome("runtime_error", "", stderr, 3)
    if behaviour == "LOOP":
        return ExecutionOutcome("timeout", "", "Process exceeded time limit", 4000)
    return ExecutionOutcome("success", behaviour + "\n", "", 3)


class FakeExecutor(CodeExecutor):
    """Records every call and answers from a handler instead of spawning Python."""

    def __init__(self, handler=scripted_program):
        self.handler = handler
        self.calls = []

    def run(self, code, input_str, timeout_sec):
        self.calls.append((code, input_str, timeout_sec))
        return self.handler(code, input_str)


def _adding_question(qid, class_name="9th"):
    return {
        "id": qid,
        "title": f"Add numbers ({qid})",
        "description": "Read integers from stdin and print their sum.",
        "class": class_name,
        "difficulty": "Easy",
        "test_cases": [
            {"id": f"{qid}-t1", "input": "5\n3", "expected_output": "8", "hidden": False},
            {"id": f"{qid}-t2", "input": "10\n20", "expected_output": "30", "hidden": True},
        ],
    }


def sample_bank_dict():
    return {
        "students": [
            {"id": "s1", "name": "Ali Khan", "roll_number": "101", "class": "9th", "section": "A"},
            {"id": "s2", "name": "Sara Ahmed", "roll_number": "102", "class": "9th", "section": "A"},
            {"id": "s3", "name": "Omar Farooq", "roll_number": "103", "class": "9th", "section": "A"},
            {"id": "s4", "name": "Hina Malik", "roll_number": "101", "class": "10th", "section": "B"},
        ],
        "questions": [
            _adding_question("q1"),
            _adding_question("q2"),
            _adding_question("q3", class_name="10th"),
        ],
        "mcq_questions": [
            {
                "id": f"m{i}",
                "question": f"Question {i}?",
                "options": ["A", "B", "C", "D"],
                "correct_answer": i % 4,
                "class": "9th",
            }
            for i in range(1, 11)
        ],
        "class_sections": [
            {"class": "9th", "section": "A", "access_code": "ALPHA", "duration_minutes": 90},
            {"class": "10th", "section": "B", "access_code": "BRAVO", "duration_minutes": 60},
        ],
    }


@pytest.fixture
def bank():
    return Bank.from_dict(sample_bank_dict())


@pytest.fixture
def config():
    return ExamConfig.default()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def store(bank):
    return MemoryStore(bank)


@pytest.fixture
def events():
    """Collected (event, details) pairs from the orchestrator's session logger."""
    return []


@pytest.fixture
def orchestrator(store, config, clock, executor, events):
    orch = SessionOrchestrator(
        store=store,
        grader=Grader(config, executor),
        config=config,
        clock=clock,
        rng=random.Random(7),
        session_logger=lambda event, details: events.append((event, details)),
    )
    yield orch
    orch.shutdown()
