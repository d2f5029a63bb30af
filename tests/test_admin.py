"""
Tests for the admin tools.

Covers:
- Key generation and bank encryption/verification
- CSV export of sessions
- Access code rotation
- Violation report
- Class section listing, event log and sample config
"""

import csv
import json
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from exam_engine import admin
from exam_engine.clock import ManualClock
from exam_engine.config_loader import load_config
from exam_engine.eventlog import EventLog
from exam_engine.grader import Grader
from exam_engine.models import Bank, ExamConfig
from exam_engine.orchestrator import SessionOrchestrator
from exam_engine.store import JsonFileStore

from conftest import FakeExecutor, sample_bank_dict


@pytest.fixture
def bank_file(tmp_path):
    path = tmp_path / "bank.json"
    path.write_text(json.dumps(sample_bank_dict()))
    return path


@pytest.fixture
def data_dir(tmp_path):
    """A data directory with one finished exam (s1) and one in progress (s2)."""
    data = tmp_path / "data"
    config = ExamConfig.default()
    orch = SessionOrchestrator(
        JsonFileStore(data, Bank.from_dict(sample_bank_dict())),
        Grader(config, FakeExecutor()),
        config,
        clock=ManualClock(),
    )
    finished = orch.start_exam("s1", "ALPHA").session_id
    orch.submit_answer(finished, "q1", "ADD")
    orch.submit_answer(finished, "q2", "ADD")
    orch.submit_coding_section(finished)
    orch.submit_mcq_section(finished)

    in_progress = orch.start_exam("s2", "ALPHA").session_id
    orch.report_integrity_event(in_progress, "focus_lost")
    orch.report_integrity_event(in_progress, "tab_hidden")
    orch.shutdown()
    return data


class TestKeys:
    """Test key generation and bank encryption."""

    def test_keygen(self, tmp_path, capsys):
        key_path = tmp_path / "group.key"

        assert admin.main(["keygen", "--out", str(key_path)]) == 0
        Fernet(key_path.read_bytes())
        assert "[OK]" in capsys.readouterr().out

    def test_encrypt_and_verify_with_key(self, tmp_path, bank_file, capsys):
        key_path = tmp_path / "group.key"
        enc_path = tmp_path / "bank.enc"
        admin.main(["keygen", "--out", str(key_path)])

        assert admin.main(["encrypt-bank", "--in", str(bank_file), "--out", str(enc_path),
                           "--key-file", str(key_path)]) == 0
        assert admin.main(["verify-bank", "--bank", str(enc_path), "--key-file", str(key_path)]) == 0

        out = capsys.readouterr().out
        assert "Students: 4" in out
        assert "Class 9th: 2 coding, 10 MCQ" in out

    def test_encrypt_and_verify_with_password(self, tmp_path, bank_file):
        enc_path = tmp_path / "bank.enc"

        with patch("exam_engine.admin.getpass.getpass", side_effect=["longpassword", "longpassword"]):
            assert admin.main(["encrypt-bank", "--in", str(bank_file), "--out", str(enc_path), "--password"]) == 0
        with patch("exam_engine.admin.getpass.getpass", return_value="longpassword"):
            assert admin.main(["verify-bank", "--bank", str(enc_path), "--password"]) == 0

    def test_password_mismatch(self, tmp_path, bank_file, capsys):
        with patch("exam_engine.admin.getpass.getpass", side_effect=["longpassword", "different1"]):
            result = admin.main(["encrypt-bank", "--in", str(bank_file), "--out", str(tmp_path / "b.enc"),
                                 "--password"])

        assert result == 1
        assert "do not match" in capsys.readouterr().err
        assert not (tmp_path / "b.enc").exists()

    def test_short_password(self, tmp_path, bank_file):
        with patch("exam_engine.admin.getpass.getpass", side_effect=["short", "short"]):
            assert admin.main(["encrypt-bank", "--in", str(bank_file), "--out", str(tmp_path / "b.enc"),
                               "--password"]) == 1

    def test_verify_wrong_key(self, tmp_path, bank_file, capsys):
        enc_path = tmp_path / "bank.enc"
        key_path = tmp_path / "a.key"
        other_path = tmp_path / "b.key"
        admin.main(["keygen", "--out", str(key_path)])
        admin.main(["keygen", "--out", str(other_path)])
        admin.main(["encrypt-bank", "--in", str(bank_file), "--out", str(enc_path), "--key-file", str(key_path)])

        assert admin.main(["verify-bank", "--bank", str(enc_path), "--key-file", str(other_path)]) == 1
        assert "Decryption failed" in capsys.readouterr().err

    def test_verify_missing_file(self, tmp_path, capsys):
        assert admin.main(["verify-bank", "--bank", str(tmp_path / "missing.json")]) == 1
        assert "File not found" in capsys.readouterr().err


class TestExportResults:
    """Test the CSV export."""

    def test_export(self, tmp_path, bank_file, data_dir):
        out = tmp_path / "results.csv"

        assert admin.main(["export-results", "--bank", str(bank_file), "--data", str(data_dir),
                           "--out", str(out)]) == 0

        with open(out, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert rows[0] == admin.CSV_HEADER
        assert len(rows) == 3

        by_name = {row[0]: row for row in rows[1:]}
        finished = by_name["Ali Khan"]
        assert finished[1:4] == ["101", "9th", "A"]
        assert finished[6:10] == ["100", "0", "80", "0"]
        assert by_name["Sara Ahmed"][5] == "In Progress"
        assert by_name["Sara Ahmed"][9] == "2"

    def test_export_empty(self, tmp_path):
        out = tmp_path / "results.csv"

        assert admin.export_results([], out) == 0
        assert out.read_text(encoding="utf-8").strip() == ",".join(admin.CSV_HEADER)


class TestRotateCode:
    """Test access code rotation."""

    def test_rotate(self, bank_file, data_dir):
        assert admin.main(["rotate-code", "--bank", str(bank_file), "--data", str(data_dir),
                           "--class", "9th", "--section", "A", "--code", "NEW"]) == 0

        sections = json.loads((data_dir / "class_sections.json").read_text())
        codes = {(s["class"], s["section"]): s["access_code"] for s in sections}
        assert codes[("9th", "A")] == "NEW"
        assert codes[("10th", "B")] == "BRAVO"

    def test_rotate_unknown_section(self, bank_file, data_dir, capsys):
        assert admin.main(["rotate-code", "--bank", str(bank_file), "--data", str(data_dir),
                           "--class", "12th", "--section", "Z", "--code", "NEW"]) == 1
        assert "No class section 12th-Z" in capsys.readouterr().err


class TestViolations:
    """Test the violation report."""

    def test_lists_sessions_with_violations(self, bank_file, data_dir, capsys):
        assert admin.main(["violations", "--bank", str(bank_file), "--data", str(data_dir)]) == 0

        out = capsys.readouterr().out
        assert "Sara Ahmed (102, 9th-A): 2 exit attempt(s)" in out
        assert "focus_lost during coding" in out
        assert "Ali Khan" not in out

    def test_no_violations(self, tmp_path, bank_file, capsys):
        assert admin.main(["violations", "--bank", str(bank_file), "--data", str(tmp_path / "empty")]) == 0
        assert "No violations recorded" in capsys.readouterr().out


class TestSections:
    """Test the class section listing."""

    def test_shows_rotated_code(self, bank_file, data_dir, capsys):
        admin.main(["rotate-code", "--bank", str(bank_file), "--data", str(data_dir),
                    "--class", "9th", "--section", "A", "--code", "NEW"])
        capsys.readouterr()

        assert admin.main(["sections", "--bank", str(bank_file), "--data", str(data_dir)]) == 0

        lines = capsys.readouterr().out.splitlines()
        assert lines[0].split() == ["Class", "Section", "Minutes", "Access", "code"]
        assert lines[1].split() == ["10th", "B", "60", "BRAVO"]
        assert lines[2].split() == ["9th", "A", "90", "NEW"]


class TestEventLogCommand:
    """Test reading the event log from the admin CLI."""

    @pytest.fixture
    def logged_dir(self, tmp_path):
        data = tmp_path / "data"
        data.mkdir()
        log = EventLog(data / "events.log")
        log.log("SESSION_START", "Session: a")
        log.log("INTEGRITY_VIOLATION", "Session: a, Event: focus_lost, Exit Attempts: 1")
        log.log("EXAM_FINISH", "Session: a, Total Score: 80")
        return data

    def test_all_events(self, logged_dir, capsys):
        assert admin.main(["log", "--data", str(logged_dir)]) == 0

        out = capsys.readouterr().out
        assert "SESSION_START" in out
        assert "[OK] 3 event(s)" in out

    def test_filter_by_event(self, logged_dir, capsys):
        assert admin.main(["log", "--data", str(logged_dir), "--event", "integrity_violation"]) == 0

        out = capsys.readouterr().out
        assert "Event: focus_lost" in out
        assert "SESSION_START" not in out
        assert "[OK] 1 event(s)" in out

    def test_missing_log(self, tmp_path, capsys):
        assert admin.main(["log", "--data", str(tmp_path)]) == 1
        assert "No event log" in capsys.readouterr().err


class TestSampleConfig:
    """Test writing a starter config.json."""

    def test_writes_loadable_config(self, tmp_path, capsys):
        path = tmp_path / "config.json"

        assert admin.main(["sample-config", "--out", str(path)]) == 0

        assert load_config(path) == ExamConfig.default()
        assert "[OK] Sample configuration written" in capsys.readouterr().out
