"""
Exam policy file (config.json).

Counts, weights and time limits are read into an ExamConfig and validated
before any session starts.
"""

import json
import sys
from pathlib import Path
from typing import Optional

from .models import ExamConfig

CONFIG_HELP = {
    "coding_question_count": "Coding questions drawn per student (fewer if the class has fewer)",
    "mcq_question_count": "MCQ questions drawn per student (fewer if the class has fewer)",
    "coding_weight": "Share of the coding score in the total (coding_weight + mcq_weight = 1)",
    "mcq_weight": "Share of the MCQ score in the total",
    "default_duration_minutes": "Exam duration when a class section does not set one",
    "test_time_limit_ms": "Time limit for a single test case run",
    "memory_limit_mb": "Memory limit for a single test case run (Unix only)",
    "violation_warning_threshold": "Exit attempts after which warnings become severe",
    "deterministic_assignment": "Derive each student's questions from their identity and the date",
}


def default_config_path() -> Path:
    """config.json next to the executable, or in the project root when run from source."""
    if getattr(sys, 'frozen', False):
        return Path(sys.executable).parent / "config.json"
    return Path(__file__).parent.parent / "config.json"


def _read_json_object(path: Path) -> dict:
    try:
        raw = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path.name}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Invalid configuration in {path.name}: top-level value must be an object")
    return data


def load_config(config_path: Optional[Path] = None) -> ExamConfig:
    """
    Read and validate the exam policy.

    A missing file is not an error: the defaults (2 coding + 10 MCQ, 80/20)
    are used and a warning is printed.

    Raises:
        ValueError: Unreadable file, malformed JSON or inconsistent values
    """
    path = Path(config_path) if config_path is not None else default_config_path()

    if not path.exists():
        print(f"Warning: {path} not found. Using default configuration.")
        return ExamConfig.default()

    config = ExamConfig.from_dict(_read_json_object(path))
    ok, problem = config.validate()
    if not ok:
        raise ValueError(f"Invalid configuration in {path.name}: {problem}")
    return config


def create_sample_config(output_path: Path):
    """Write the default policy plus a short description of every key."""
    sample = ExamConfig.default().to_dict()
    sample["_help"] = CONFIG_HELP

    Path(output_path).write_text(json.dumps(sample, indent=2), encoding='utf-8')
    print(f"[OK] Sample configuration written to {output_path}")
