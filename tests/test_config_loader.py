"""
Tests for exam configuration loading and scoring policy.
"""

import json

import pytest

from exam_engine.config_loader import create_sample_config, load_config
from exam_engine.models import ExamConfig, round_half_up


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return path


class TestLoadConfig:
    """Test reading config files."""

    def test_missing_file_uses_defaults(self, tmp_path, capsys):
        config = load_config(tmp_path / "missing.json")

        assert config == ExamConfig.default()
        assert "Using default configuration" in capsys.readouterr().out

    def test_defaults(self):
        config = ExamConfig.default()

        assert config.coding_question_count == 2
        assert config.mcq_question_count == 10
        assert config.coding_weight == 0.8
        assert config.mcq_weight == 0.2
        assert config.default_duration_minutes == 90
        assert config.violation_warning_threshold == 3
        assert config.deterministic_assignment is False

    def test_partial_file(self, tmp_path):
        config = load_config(write_config(tmp_path, {"mcq_question_count": 20, "test_time_limit_ms": 500}))

        assert config.mcq_question_count == 20
        assert config.test_time_limit_ms == 500
        assert config.coding_question_count == 2

    @pytest.mark.parametrize("data,message", [
        ({"coding_weight": 0.5, "mcq_weight": 0.4}, "Weights must add up"),
        ({"coding_question_count": -1}, "non-negative"),
        ({"default_duration_minutes": 0}, "between 1 and 480"),
        ({"default_duration_minutes": 500}, "between 1 and 480"),
        ({"test_time_limit_ms": 0}, "Test time limit"),
        ({"memory_limit_mb": 0}, "Memory limit"),
    ])
    def test_invalid_values(self, tmp_path, data, message):
        with pytest.raises(ValueError, match=message):
            load_config(write_config(tmp_path, data))

    def test_exam_time_is_only_the_duration(self, tmp_path):
        """Old files with an MCQ grace window still load; the key is ignored."""
        config = load_config(write_config(tmp_path, {"timeout_mcq_grace_seconds": 600}))

        assert config == ExamConfig.default()
        assert "timeout_mcq_grace_seconds" not in config.to_dict()

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")

        with pytest.raises(ValueError, match="Invalid JSON"):
            load_config(path)

    def test_top_level_must_be_object(self, tmp_path):
        with pytest.raises(ValueError, match="must be an object"):
            load_config(write_config(tmp_path, [1, 2, 3]))

    def test_sample_config_loads(self, tmp_path, capsys):
        path = tmp_path / "sample.json"
        create_sample_config(path)

        assert load_config(path) == ExamConfig.default()
        assert "coding_weight" in json.loads(path.read_text())["_help"]


class TestScoringPolicy:
    """Test rounding and weighting."""

    @pytest.mark.parametrize("value,expected", [
        (0, 0), (12.5, 13), (66.666, 67), (82.5, 83), (82.49, 82), (100, 100),
    ])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_total_score(self):
        config = ExamConfig.default()

        assert config.total_score(80, 60) == 76
        assert config.total_score(100, 100) == 100
        assert config.total_score(0, 0) == 0
        # 0.8 * 53 + 0.2 * 50 = 52.4
        assert config.total_score(53, 50) == 52

    def test_custom_weights(self):
        config = ExamConfig.from_dict({"coding_weight": 0.5, "mcq_weight": 0.5})

        assert config.validate() == (True, "")
        assert config.total_score(75, 50) == 63
