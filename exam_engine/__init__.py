"""
Python Exam Engine

Timed, two-phase (coding, then multiple choice) exam sessions:
- models: Students, questions, sessions and exam configuration
- orchestrator: Session lifecycle, phase transitions, timers and scoring
- grader: Runs submissions against test cases
- sandbox: Isolated subprocess execution of student code
- integrity: Exit-attempt and violation tracking
- store: Bank lookups and session persistence
- clock: Wall clock and a manually driven clock for tests
"""

__version__ = "1.0.0"
