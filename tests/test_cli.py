"""Tests for the command-line interface."""

import json

import pytest
from click.testing import CliRunner

from prodline_sim import __version__
from prodline_sim.cli import main
from prodline_sim.config import Config


@pytest.fixture
def runner():
    return CliRunner()


class TestSimulateCommand:
    """Tests for the headless simulate command."""

    def test_prints_summary(self, runner):
        result = runner.invoke(main, ["simulate", "--ticks", "200", "--seed", "1"])

        assert result.exit_code == 0, result.output
        assert "Cutter" in result.output
        assert "QA Check" in result.output
        assert "(200 ticks)" in result.output

    def test_json_output(self, runner):
        result = runner.invoke(main, ["simulate", "-n", "300", "--seed", "1", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["tick_count"] == 300
        assert len(data["machines"]) == 5

    def test_same_seed_same_output(self, runner):
        args = ["simulate", "-n", "500", "--seed", "9", "--json"]

        first = runner.invoke(main, args)
        second = runner.invoke(main, args)

        assert first.output == second.output

    def test_custom_config(self, runner, tmp_path):
        path = tmp_path / "line.yaml"
        path.write_text(
            "machines:\n"
            "  - id: A\n"
            "    name: Press\n"
            "    process_time_base_ms: 200\n"
        )

        result = runner.invoke(main, ["simulate", "-c", str(path), "-n", "50", "--json"])

        assert result.exit_code == 0, result.output
        assert [m["id"] for m in json.loads(result.output)["machines"]] == ["A"]

    def test_invalid_config_is_usage_error(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("machines:\n  - id: A\n    buffer_capacity: -1\n")

        result = runner.invoke(main, ["simulate", "-c", str(path)])

        assert result.exit_code == 2
        assert "buffer_capacity" in result.output

    @pytest.mark.parametrize(
        "text",
        [
            "simulation:\nmachines:\n  - id: A\n    process_time_base_ms: fast\n",
            "machines:\n  - id: A\n    process_time_base_ms: .nan\n",
            "machines:\n  - 42\n",
        ],
    )
    def test_malformed_config_is_usage_error(self, runner, tmp_path, text):
        path = tmp_path / "bad.yaml"
        path.write_text(text)

        result = runner.invoke(main, ["simulate", "-c", str(path)])

        assert result.exit_code == 2, result.output
        assert not isinstance(result.exception, (TypeError, AttributeError))

    def test_negative_ticks_rejected(self, runner):
        result = runner.invoke(main, ["simulate", "-n", "-5"])

        assert result.exit_code == 2


class TestInitCommand:
    """Tests for config generation."""

    def test_writes_loadable_config(self, runner, tmp_path):
        out = tmp_path / "cfg"

        result = runner.invoke(main, ["init", "-o", str(out)])

        assert result.exit_code == 0, result.output
        cfg = Config.from_yaml(out / "config.yaml")
        assert len(cfg.machines) == 5
        assert cfg.machines[0].name == "Cutter"


def test_version(runner):
    result = runner.invoke(main, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
