"""
Integrity monitoring for active exam sessions.

Clients report proctoring violations (focus loss, leaving fullscreen,
forbidden shortcuts, hidden tab). The monitor counts them on the session and
notifies listeners so the presentation layer can warn the student. It never
ends an exam and never touches scores.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .models import ExamSession, Violation


class EventKind(str, Enum):
    FOCUS_LOST = "focus_lost"
    FULLSCREEN_EXITED = "fullscreen_exited"
    FORBIDDEN_SHORTCUT = "forbidden_shortcut"
    TAB_HIDDEN = "tab_hidden"


@dataclass
class IntegrityNotice:
    """Sent to listeners after each counted violation."""
    session_id: str
    kind: EventKind
    exit_attempts: int
    severe: bool


# Keys blocked on their own, and (modifiers, key) combinations.
FORBIDDEN_KEYS = {"F11", "F12", "F5", "Escape"}
FORBIDDEN_COMBOS = {
    ("alt", "Tab"),
    ("alt", "F4"),
    ("ctrl+shift", "I"),
    ("ctrl+shift", "J"),
    ("ctrl+shift", "C"),
    ("ctrl", "u"),
    ("ctrl", "r"),
}


def is_forbidden_shortcut(key: str, ctrl: bool = False, shift: bool = False, alt: bool = False) -> bool:
    """Classify a raw key event as an attempt to leave the exam screen."""
    if key in FORBIDDEN_KEYS:
        return True

    if ctrl and shift:
        modifiers = "ctrl+shift"
    elif ctrl:
        modifiers = "ctrl"
    elif alt:
        modifiers = "alt"
    else:
        return False
    return (modifiers, key) in FORBIDDEN_COMBOS


class IntegrityMonitor:
    """Counts violations per session. Callers must hold the session's lock."""

    def __init__(self, warning_threshold: int = 3, clock=None):
        self.warning_threshold = warning_threshold
        self.clock = clock
        self._listeners: List[Callable[[IntegrityNotice], None]] = []

    def add_listener(self, listener: Callable[[IntegrityNotice], None]):
        self._listeners.append(listener)

    def record(self, session: ExamSession, kind: EventKind) -> Optional[IntegrityNotice]:
        """
        Count one violation against a non-terminal session.

        Returns:
            The notice sent to listeners, or None if the session is terminal
        """
        if session.is_terminal:
            return None

        kind = EventKind(kind)
        session.exit_attempts += 1
        if self.clock is not None:
            session.violations.append(Violation(
                kind=kind.value,
                timestamp=self.clock.now(),
                phase=session.current_phase.value,
            ))

        notice = IntegrityNotice(
            session_id=session.id,
            kind=kind,
            exit_attempts=session.exit_attempts,
            severe=session.exit_attempts >= self.warning_threshold,
        )
        for listener in self._listeners:
            listener(notice)
        return notice

    @staticmethod
    def apply_phase_dampening(session: ExamSession):
        """Forgive one violation at a phase submission, never going below zero."""
        session.exit_attempts = max(0, session.exit_attempts - 1)
