#!/usr/bin/env python3
"""
admin.py - Teacher tools for the exam data directory and bank files.

Usage:
    python main.py admin export-results --bank bank.json --data exam_data --out results.csv
    python main.py admin rotate-code --bank bank.json --data exam_data --class 9th --section A --code NEW
    python main.py admin violations --bank bank.json --data exam_data
    python main.py admin sections --bank bank.json --data exam_data
    python main.py admin log --data exam_data --event INTEGRITY_VIOLATION
    python main.py admin sample-config --out config.json
    python main.py admin keygen --out GROUP1.key
    python main.py admin encrypt-bank --in bank.json --out bank.enc --key-file GROUP1.key
    python main.py admin verify-bank --bank bank.enc --key-file GROUP1.key
"""

import argparse
import csv
import getpass
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from .bank import encrypt_bank, generate_key, load_bank, sha256_hex
from .config_loader import create_sample_config
from .errors import ExamError
from .eventlog import EventLog
from .models import ExamSession
from .store import JsonFileStore

CSV_HEADER = [
    'Name', 'Roll Number', 'Class', 'Section', 'Start Time', 'End Time',
    'Coding Score', 'MCQ Score', 'Total Score', 'Exit Attempts',
]


def session_rows(sessions: Iterable[ExamSession]) -> List[list]:
    """One row per session, oldest first. Unfinished sessions show 'In Progress'."""
    rows = []
    for session in sorted(sessions, key=lambda s: s.start_time):
        rows.append([
            session.student_name,
            session.roll_number,
            session.class_name,
            session.section,
            session.start_time.astimezone().strftime("%Y-%m-%d %H:%M:%S"),
            session.end_time.astimezone().strftime("%Y-%m-%d %H:%M:%S") if session.end_time else 'In Progress',
            session.coding_score,
            session.mcq_score,
            session.total_score,
            session.exit_attempts,
        ])
    return rows


def export_results(sessions: Iterable[ExamSession], out_path: Path) -> int:
    """Write sessions to a CSV file. Returns the number of rows written."""
    rows = session_rows(sessions)
    with open(out_path, 'w', encoding='utf-8', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        writer.writerows(rows)
    return len(rows)


def _read_secret(key_file: Optional[str], use_password: bool) -> Optional[str]:
    if key_file:
        return Path(key_file).read_text(encoding='utf-8').strip()
    if use_password:
        return getpass.getpass("Enter bank password: ")
    return None


def _open_store(args) -> JsonFileStore:
    bank, _ = load_bank(Path(args.bank), _read_secret(args.key_file, args.password))
    return JsonFileStore(Path(args.data), bank)


# ===== COMMANDS =====

def cmd_export_results(args) -> int:
    store = _open_store(args)
    sessions = {s.id: s for s in store.list_sessions()}
    # Completed results win over the session file if both exist
    sessions.update({s.id: s for s in store.list_results()})
    count = export_results(sessions.values(), Path(args.out))
    print(f"[OK] Exported {count} session(s) to {args.out}")
    return 0


def cmd_rotate_code(args) -> int:
    store = _open_store(args)
    try:
        section = store.update_access_code(args.class_name, args.section, args.code)
    except KeyError as e:
        print(f"[ERROR] {e.args[0]}", file=sys.stderr)
        return 1
    print(f"[OK] Access code for {section.class_name}-{section.section} updated")
    print("  Sessions already in progress are not affected.")
    return 0


def cmd_violations(args) -> int:
    store = _open_store(args)
    sessions = [s for s in store.list_sessions() if s.exit_attempts or s.violations]
    if not sessions:
        print("[OK] No violations recorded")
        return 0

    for session in sorted(sessions, key=lambda s: -s.exit_attempts):
        print(f"{session.student_name} ({session.roll_number}, {session.class_name}-{session.section}): "
              f"{session.exit_attempts} exit attempt(s), phase {session.current_phase.value}")
        for violation in session.violations:
            print(f"  - {violation.timestamp.astimezone().strftime('%H:%M:%S')} {violation.kind} during {violation.phase}")
    return 0


def cmd_sections(args) -> int:
    store = _open_store(args)
    sections = sorted(store.list_class_sections(), key=lambda cs: (cs.class_name, cs.section))
    print(f"{'Class':<10} {'Section':<10} {'Minutes':>8}  Access code")
    for cs in sections:
        print(f"{cs.class_name:<10} {cs.section:<10} {cs.duration_minutes:>8}  {cs.access_code}")
    return 0


def cmd_log(args) -> int:
    log_path = Path(args.data) / "events.log"
    if not log_path.exists():
        print(f"[ERROR] No event log in {args.data}", file=sys.stderr)
        return 1

    events = EventLog(log_path).read_events()
    if args.event:
        events = [(event, details) for event, details in events if event == args.event.upper()]
    for event, details in events:
        print(f"{event:<20} {details}")
    print(f"[OK] {len(events)} event(s)")
    return 0


def cmd_sample_config(args) -> int:
    create_sample_config(Path(args.out))
    return 0


def cmd_keygen(args) -> int:
    key = generate_key()
    with open(args.out, 'wb') as f:
        f.write(key)
    print(f"[OK] Success: Encryption key generated")
    print(f"  Output: {args.out}")
    print(f"\n[!] SECURITY: Store this key securely. Never commit to version control.")
    return 0


def cmd_encrypt_bank(args) -> int:
    plaintext = Path(args.in_file).read_bytes()

    if args.password:
        password = getpass.getpass("Enter encryption password: ")
        if password != getpass.getpass("Confirm password: "):
            print("[ERROR] Passwords do not match", file=sys.stderr)
            return 1
        if len(password) < 8:
            print("[ERROR] Password must be at least 8 characters", file=sys.stderr)
            return 1
        final_data = encrypt_bank(plaintext, password=password)
    else:
        final_data = encrypt_bank(plaintext, key=Path(args.key_file).read_bytes().strip())

    Path(args.out).parent.mkdir(parents=True, exist_ok=True)
    Path(args.out).write_bytes(final_data)

    print(f"[OK] Success: Bank encrypted")
    print(f"  Input: {args.in_file} ({len(plaintext)} bytes)")
    print(f"  Output: {args.out} ({len(final_data)} bytes)")
    print(f"  Method: {'Password-based' if args.password else 'Key file'}")
    print(f"  SHA256: {sha256_hex(final_data)}")
    return 0


def cmd_verify_bank(args) -> int:
    bank, config = load_bank(Path(args.bank), _read_secret(args.key_file, args.password))
    print(f"[OK] Bank is valid")
    print(f"  Students: {len(bank.students)}")
    print(f"  Coding questions: {len(bank.questions)}")
    print(f"  MCQ questions: {len(bank.mcq_questions)}")
    print(f"  Class sections: {len(bank.class_sections)}")
    if config is not None:
        print(f"  Bundled config: {config.coding_question_count} coding + {config.mcq_question_count} MCQ")

    classes = sorted({s.class_name for s in bank.students})
    for class_name in classes:
        coding = sum(1 for q in bank.questions if q.class_name == class_name)
        mcq = sum(1 for q in bank.mcq_questions if q.class_name == class_name)
        print(f"  Class {class_name}: {coding} coding, {mcq} MCQ")
        if coding == 0:
            print(f"  [!] Class {class_name} has no coding questions")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Exam administration tools.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def bank_args(p, data=True):
        p.add_argument("--bank", required=True, help="Bank file (.json or encrypted)")
        p.add_argument("--key-file", help="Key file for an encrypted bank")
        p.add_argument("--password", action="store_true", help="Prompt for the bank password")
        if data:
            p.add_argument("--data", default="exam_data", help="Exam data directory (default: exam_data)")

    p = sub.add_parser("export-results", help="Export all sessions to CSV")
    bank_args(p)
    p.add_argument("--out", required=True, help="Output CSV file")
    p.set_defaults(func=cmd_export_results)

    p = sub.add_parser("rotate-code", help="Change the access code of a class section")
    bank_args(p)
    p.add_argument("--class", dest="class_name", required=True)
    p.add_argument("--section", required=True)
    p.add_argument("--code", required=True)
    p.set_defaults(func=cmd_rotate_code)

    p = sub.add_parser("violations", help="List sessions with integrity violations")
    bank_args(p)
    p.set_defaults(func=cmd_violations)

    p = sub.add_parser("sections", help="List class sections with their current access codes")
    bank_args(p)
    p.set_defaults(func=cmd_sections)

    p = sub.add_parser("log", help="Show the exam event log")
    p.add_argument("--data", default="exam_data", help="Exam data directory (default: exam_data)")
    p.add_argument("--event", help="Only show this event (e.g. INTEGRITY_VIOLATION)")
    p.set_defaults(func=cmd_log)

    p = sub.add_parser("sample-config", help="Write a config.json with default values and key descriptions")
    p.add_argument("--out", default="config.json", help="Output file (default: config.json)")
    p.set_defaults(func=cmd_sample_config)

    p = sub.add_parser("keygen", help="Generate a new Fernet key")
    p.add_argument("--out", required=True, help="Output file path for the key")
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("encrypt-bank", help="Encrypt a plaintext JSON bank")
    p.add_argument("--in", dest="in_file", required=True, help="Input plaintext JSON file")
    p.add_argument("--out", required=True, help="Output encrypted bank file")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("--key-file", help="File containing the encryption key")
    group.add_argument("--password", action="store_true", help="Use password-based encryption")
    p.set_defaults(func=cmd_encrypt_bank)

    p = sub.add_parser("verify-bank", help="Validate a bank file")
    bank_args(p, data=False)
    p.set_defaults(func=cmd_verify_bank)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except FileNotFoundError as e:
        print(f"[ERROR] File not found: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    except ExamError as e:
        print(f"[ERROR] {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
