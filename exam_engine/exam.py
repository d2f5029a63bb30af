#!/usr/bin/env python3
"""
Terminal exam client.

Student-facing command loop on top of SessionOrchestrator: access check,
showing questions, saving answers, section submission and the countdown.
Ctrl+C / Ctrl+D during the exam are reported as forbidden shortcuts.
"""

import argparse
import getpass
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from .bank import load_bank
from .config_loader import load_config
from .errors import ExamError, ValidationError
from .eventlog import EventLog
from .grader import Grader
from .integrity import EventKind, IntegrityNotice, is_forbidden_shortcut
from .models import Bank, ExamConfig, ExamSession, Phase, Student
from .orchestrator import SessionOrchestrator
from .sandbox import SubprocessExecutor
from .store import JsonFileStore

HELP_TEXT = """Commands:
  help                 Show this help
  time                 Show remaining time
  status               Show saved answers
  show qN              Show coding question N (e.g. show q1)
  show mcq             Show all MCQ questions
  answer qN FILE       Save the code in FILE as your answer to question N
  test qN              Run your saved answer against the visible test cases
  submit               Submit the coding section (cannot be undone)
  mcq N OPTION         Answer MCQ N with option 1-4 (e.g. mcq 3 2)
  finish               Submit the MCQ section and finish the exam
  violation KIND       Report a proctoring event (focus_lost, fullscreen_exited,
                       forbidden_shortcut, tab_hidden); used by wrapper clients
  key COMBO            Report a raw key press (e.g. key alt+Tab, key F12); counted
                       only when it is a blocked shortcut
  exit                 Leave; you can resume before the time runs out"""


def build_orchestrator(bank: Bank, config: ExamConfig, data_dir: Path) -> SessionOrchestrator:
    """Wire the file store, event log, sandbox and grader into an orchestrator."""
    store = JsonFileStore(data_dir, bank)
    event_log = EventLog(data_dir / "events.log")
    grader = Grader(config, SubprocessExecutor(memory_limit_mb=config.memory_limit_mb))
    orchestrator = SessionOrchestrator(
        store=store,
        grader=grader,
        config=config,
        session_logger=event_log.log,
    )
    return orchestrator


class ExamRunner:
    """Main CLI application controller."""

    def __init__(self, orchestrator: SessionOrchestrator, out=None):
        self.orchestrator = orchestrator
        self.out = out or sys.stdout
        self.session_id: Optional[str] = None
        self.finished = False
        self._last_phase: Optional[Phase] = None
        self._phase_lock = threading.Lock()

        orchestrator.monitor.add_listener(self._on_notice)
        orchestrator.add_warning_listener(self._on_persistence_warning)

    def say(self, text: str = ""):
        print(text, file=self.out)

    @property
    def session(self) -> ExamSession:
        return self.orchestrator.get_session(self.session_id)

    # ===== LISTENERS =====

    def _on_notice(self, notice: IntegrityNotice):
        if notice.session_id != self.session_id:
            return
        self.say("")
        self.say("!" * 60)
        self.say(f"WARNING: leaving the exam is not allowed ({notice.kind.value}).")
        self.say(f"{notice.exit_attempts} violation(s) recorded and logged.")
        if notice.severe:
            self.say("Repeated violations will be reviewed by your teacher.")
        self.say("!" * 60)

    def _on_persistence_warning(self, session_id: str, message: str):
        if session_id == self.session_id:
            self.say("Warning: your progress could not be saved to disk. It is kept in memory; keep working.")

    # ===== AUTHENTICATION =====

    def find_students(self, roll_number: str) -> List[Student]:
        return [s for s in self.orchestrator.store.list_students() if s.roll_number == roll_number]

    def authenticate_student(self, input_fn=input, secret_fn=getpass.getpass) -> bool:
        """
        Prompt for roll number and access code, then start or resume a session.

        Returns:
            True if a session is ready, False otherwise
        """
        try:
            roll_number = input_fn("Roll number: ").strip()
            matches = self.find_students(roll_number)
            if not matches:
                self.say("No student with that roll number.")
                return False

            student = matches[0]
            if len(matches) > 1:
                for i, candidate in enumerate(matches, start=1):
                    self.say(f"  {i}. {candidate.name} ({candidate.class_name}-{candidate.section})")
                choice = input_fn("Select your entry: ").strip()
                if not choice.isdigit() or not 1 <= int(choice) <= len(matches):
                    self.say("Invalid selection.")
                    return False
                student = matches[int(choice) - 1]

            active = self.orchestrator.active_session_for(student.id)
            if active is not None:
                resume = input_fn("An exam is already in progress. Resume? [y/N]: ").strip().lower()
                if resume != 'y':
                    self.say("Aborted.")
                    return False
                self.session_id = active.id
                self.say(f"✓ Resumed exam for {student.name}")
                return True

            access_code = secret_fn("Access code: ").strip()
            handle = self.orchestrator.start_exam(student.id, access_code)
            self.session_id = handle.session_id
            self.say(f"✓ Welcome {student.name} ({student.class_name}-{student.section})")
            self.say(f"✓ {len(handle.questions)} coding question(s), {len(handle.mcq_questions)} MCQ question(s)")
            return True

        except (KeyboardInterrupt, EOFError):
            self.say("\nCancelled.")
            return False
        except ExamError as e:
            self.say(f"Error: {e.message}")
            return False

    # ===== COMMAND LOOP =====

    def command_loop(self, input_fn=input):
        self.say(HELP_TEXT)
        self._last_phase = self.session.current_phase

        while not self.finished:
            try:
                line = input_fn(f"\n[{self.format_remaining_time()}] exam> ").strip()
            except KeyboardInterrupt:
                # The terminal equivalent of a blocked exit shortcut
                self.orchestrator.report_integrity_event(self.session_id, EventKind.FORBIDDEN_SHORTCUT)
                continue
            except EOFError:
                self.orchestrator.report_integrity_event(self.session_id, EventKind.FORBIDDEN_SHORTCUT)
                self.cmd_exit()
                break

            self._check_phase_change()
            if self.finished or not line:
                continue

            parts = line.split()
            try:
                self.dispatch(parts[0].lower(), parts[1:])
            except ValidationError as e:
                self.say(f"Rejected: {e.message}")
            except ExamError as e:
                self.say(f"Error: {e.message}")

    def _check_phase_change(self):
        """Report transitions made by the countdown while the student was typing."""
        with self._phase_lock:
            phase = self.session.current_phase
            if phase is self._last_phase or self.finished:
                return
            if phase is Phase.COMPLETED:
                self.say("Time is up: the exam has been submitted automatically.")
                self.print_final_score()
                self.finished = True
            self._last_phase = phase

    def dispatch(self, command: str, args: List[str]):
        handlers = {
            "help": lambda: self.say(HELP_TEXT),
            "time": self.cmd_time,
            "status": self.cmd_status,
            "show": lambda: self.cmd_show(args),
            "answer": lambda: self.cmd_answer(args),
            "test": lambda: self.cmd_test(args),
            "submit": self.cmd_submit,
            "mcq": lambda: self.cmd_mcq(args),
            "finish": self.cmd_finish,
            "violation": lambda: self.cmd_violation(args),
            "key": lambda: self.cmd_key(args),
            "exit": self.cmd_exit,
        }
        handler = handlers.get(command)
        if handler is None:
            self.say(f"Unknown command '{command}'. Type 'help'.")
            return
        with self._phase_lock:
            handler()
            self._last_phase = self.session.current_phase

    def format_remaining_time(self) -> str:
        """Format remaining time as HH:MM:SS."""
        total_seconds = self.orchestrator.remaining_seconds(self.session_id)
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    def _coding_question(self, args: List[str]):
        if not args or not args[0].lower().startswith('q') or not args[0][1:].isdigit():
            self.say("Specify a question, e.g. q1")
            return None
        index = int(args[0][1:]) - 1
        questions = self.session.questions
        if not 0 <= index < len(questions):
            self.say(f"Valid questions: {', '.join(f'q{i + 1}' for i in range(len(questions)))}")
            return None
        return questions[index]

    # ===== COMMANDS =====

    def cmd_time(self):
        self.say(f"Time remaining: {self.format_remaining_time()}")

    def cmd_status(self):
        session = self.session
        self.say(f"Phase: {session.current_phase.value} | Exit attempts: {session.exit_attempts}")
        for i, question in enumerate(session.questions, start=1):
            saved = "saved" if session.answers.get(question.id, "").strip() else "not answered"
            self.say(f"- q{i} {question.title}: {saved}")
        answered = sum(1 for q in session.mcq_questions if q.id in session.mcq_answers)
        self.say(f"- MCQ: {answered}/{len(session.mcq_questions)} answered")
        if session.current_phase is not Phase.CODING:
            self.say(f"Coding score: {session.coding_score}/100")

    def cmd_show(self, args: List[str]):
        if args and args[0].lower() == "mcq":
            session = self.session
            for i, question in enumerate(session.mcq_questions, start=1):
                chosen = session.mcq_answers.get(question.id)
                self.say(f"\n{i}. {question.question}")
                for j, option in enumerate(question.options):
                    marker = "*" if chosen == j else " "
                    self.say(f"   {marker} {j + 1}) {option}")
            return

        question = self._coding_question(args)
        if question is None:
            return
        visible = question.visible_copy()
        self.say(f"\n{visible.title} [{visible.difficulty}]")
        self.say("=" * 50)
        self.say(visible.description)
        for i, test_case in enumerate(visible.test_cases, start=1):
            self.say(f"\nExample {i} input:\n{test_case.input}")
            self.say(f"Example {i} output:\n{test_case.expected_output}")
        hidden = len(question.test_cases) - len(visible.test_cases)
        if hidden:
            self.say(f"\n(+{hidden} hidden test case(s))")

    def cmd_answer(self, args: List[str]):
        question = self._coding_question(args)
        if question is None:
            return
        if len(args) < 2:
            self.say("Usage: answer qN FILE")
            return
        code_file = Path(args[1])
        if not code_file.exists():
            self.say(f"File '{code_file}' not found.")
            return
        code = code_file.read_text(encoding='utf-8')
        ack = self.orchestrator.submit_answer(self.session_id, question.id, code)
        self.say(f"✓ Answer saved for {args[0]}{'' if ack.persisted else ' (in memory only)'}")

    def cmd_test(self, args: List[str]):
        """Dry run against visible test cases only; nothing is recorded."""
        question = self._coding_question(args)
        if question is None:
            return
        code = self.session.answers.get(question.id, "")
        result = self.orchestrator.grader.evaluate(question.visible_copy(), code)
        self.say(self.orchestrator.grader.format_results(result))

    def cmd_submit(self):
        unanswered = [q.title for q in self.session.questions if not self.session.answers.get(q.id, "").strip()]
        if unanswered:
            self.say(f"Not answered yet: {', '.join(unanswered)}")
        self.say("Grading coding section...")
        score = self.orchestrator.submit_coding_section(self.session_id)
        self.say(f"✓ Coding section submitted. Coding score: {score}/100")
        self.say("Type 'show mcq' to see the multiple-choice questions.")

    def cmd_mcq(self, args: List[str]):
        if len(args) != 2 or not args[0].isdigit() or not args[1].isdigit():
            self.say("Usage: mcq N OPTION  (e.g. mcq 3 2)")
            return
        index = int(args[0]) - 1
        questions = self.session.mcq_questions
        if not 0 <= index < len(questions):
            self.say(f"MCQ number must be between 1 and {len(questions)}")
            return
        self.orchestrator.submit_mcq_answer(self.session_id, questions[index].id, int(args[1]) - 1)
        self.say(f"✓ MCQ {args[0]} answered")

    def cmd_finish(self):
        self.orchestrator.submit_mcq_section(self.session_id)
        self.print_final_score()
        self.finished = True

    def cmd_violation(self, args: List[str]):
        if len(args) != 1:
            self.say(f"Usage: violation KIND  (one of: {', '.join(k.value for k in EventKind)})")
            return
        self.orchestrator.report_integrity_event(self.session_id, args[0].lower())

    def cmd_key(self, args: List[str]):
        """Classify a key press forwarded by a wrapper client, e.g. 'ctrl+shift+I'."""
        if len(args) != 1:
            self.say("Usage: key COMBO  (e.g. key alt+Tab, key ctrl+shift+I, key F12)")
            return
        *modifiers, key = args[0].split('+')
        modifiers = {m.lower() for m in modifiers}
        unknown = modifiers - {"ctrl", "shift", "alt"}
        if not key or unknown:
            self.say(f"Unknown modifier(s): {', '.join(sorted(unknown))}" if unknown else "Missing key")
            return

        if is_forbidden_shortcut(key, ctrl="ctrl" in modifiers, shift="shift" in modifiers, alt="alt" in modifiers):
            self.orchestrator.report_integrity_event(self.session_id, EventKind.FORBIDDEN_SHORTCUT)

    def cmd_exit(self):
        self.say("Progress saved. Run the exam again and enter your roll number to resume.")
        self.finished = True

    def print_final_score(self):
        session = self.session
        self.say("")
        self.say("=" * 40)
        self.say(f"Coding score: {session.coding_score}/100")
        self.say(f"MCQ score:    {session.mcq_score}/100")
        self.say(f"TOTAL SCORE:  {session.total_score}/100")
        self.say("=" * 40)


def _watch_phase(runner: ExamRunner, stop: threading.Event):
    """Background thread: tell the student when the countdown moves the exam on."""
    while not stop.is_set() and not runner.finished:
        runner._check_phase_change()
        time.sleep(1)


def main(argv=None):
    """Entry point for the exam client."""
    parser = argparse.ArgumentParser(
        description="Timed Python exam (coding + multiple choice)",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--bank", required=True, help="Bank file (.json or encrypted)")
    parser.add_argument("--config", help="Path to exam configuration file (default: config.json)")
    parser.add_argument("--data", default="exam_data", help="Directory for sessions and logs (default: exam_data)")
    args = parser.parse_args(argv)

    bank_path = Path(args.bank)
    if not bank_path.exists():
        print(f"[ERROR] Bank file '{bank_path}' not found", file=sys.stderr)
        return 1

    key_input = None
    if bank_path.suffix.lower() != '.json':
        try:
            key_input = getpass.getpass(f"Enter key or password for {bank_path.name}: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\nExiting.")
            return 1

    try:
        bank, bundled_config = load_bank(bank_path, key_input)
        config = bundled_config or load_config(Path(args.config) if args.config else None)
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1

    data_dir = Path(args.data)
    try:
        orchestrator = build_orchestrator(bank, config, data_dir)
    except ExamError as e:
        print(f"[ERROR] {e.message}", file=sys.stderr)
        return 1

    recovered = orchestrator.recover()
    if recovered:
        print(f"✓ {recovered} in-progress session(s) restored")

    runner = ExamRunner(orchestrator)
    if not runner.authenticate_student():
        orchestrator.shutdown()
        return 1

    stop = threading.Event()
    watcher = threading.Thread(target=_watch_phase, args=(runner, stop), daemon=True)
    watcher.start()
    try:
        runner.command_loop()
    finally:
        stop.set()
        watcher.join(timeout=1.0)
        if orchestrator.flush_pending():
            print("[ERROR] Some progress could not be saved to disk. Tell your teacher before closing this window.",
                  file=sys.stderr)
        orchestrator.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
