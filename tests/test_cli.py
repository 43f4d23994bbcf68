"""Tests for the command-line interface."""

import json
import logging
import sys

import pytest
from click.testing import CliRunner

from rook import __version__
from rook import cli as cli_module
from rook.cli import cli
from rook.transport import InProcessTransport

PYTHON = sys.executable


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def in_process(monkeypatch):
    """Run executors in-process instead of over SSH or subprocesses."""
    transports = []

    def create(config):
        transport = InProcessTransport()
        transports.append(transport)
        return transport

    monkeypatch.setattr(cli_module, "create_transport", create)
    return transports


def command_runbook(code: str, name: str = "greet") -> str:
    return f"""
    run:
      - name: {name}
        actions:
          - action: command
            name: python
            params:
              cmd: "{PYTHON}"
              args: ["-c", "{code}"]
    """


GROUP_RUNBOOK = """
group:
  - name: web
    hosts: [web1, web2]
job:
  - name: setup
    actions:
      - action: file
        params: {path: /tmp/rook-check, state: directory}
run:
  - target: web
    name: deploy
    actions:
      - {action: job, params: {name: setup}}
"""


class TestCli:
    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert result.output.strip() == f"rook {__version__}"

    def test_help_without_command(self):
        result = CliRunner().invoke(cli, [])
        assert result.exit_code == 0
        assert "run" in result.output
        assert "check" in result.output


class TestActionCommand:
    def test_list(self):
        result = CliRunner().invoke(cli, ["action"])
        assert result.exit_code == 0
        names = [line.split()[0] for line in result.output.splitlines()]
        assert names == ["command", "copy", "file", "git", "package"]

    def test_show_one(self):
        result = CliRunner().invoke(cli, ["action", "copy"])
        assert result.exit_code == 0
        assert "Parameters:" in result.output
        assert "src (string, required)" in result.output

    def test_json(self):
        result = CliRunner().invoke(cli, ["action", "package", "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["name"] == "package"
        assert [p["name"] for p in data["params"]] == ["name", "state"]

    def test_unknown(self):
        result = CliRunner().invoke(cli, ["action", "teleport"])
        assert result.exit_code == 1
        assert "Unknown action: teleport" in result.output


class TestCheckCommand:
    """Tests for `rook check`."""

    def test_valid_runbook(self, write_runbook):
        path = write_runbook("main.tr", GROUP_RUNBOOK)
        result = CliRunner().invoke(cli, ["check", str(path)])
        assert result.exit_code == 0, result.output
        assert "OK: 1 run(s), 2 host plan(s)" in result.output

    def test_errors_reported(self, write_runbook):
        path = write_runbook(
            "main.tr",
            """
            group:
              - name: web
                hosts: [web1]
            run:
              - target: web
                actions:
                  - {action: file, params: {path: "{{ base }}/x"}}
                  - {action: teleport}
            """,
        )
        result = CliRunner().invoke(cli, ["check", str(path)])
        assert result.exit_code == 1
        assert "Unknown action type 'teleport'" in result.output
        assert "1 validation error(s) found" in result.output

    def test_unresolved_variable_names_host(self, write_runbook):
        path = write_runbook(
            "main.tr",
            """
            group:
              - name: web
                hosts: [web1]
            run:
              - target: web
                actions:
                  - {action: file, name: base dir, params: {path: "{{ base }}/x"}}
            """,
        )
        result = CliRunner().invoke(cli, ["check", str(path)])
        assert result.exit_code == 1
        assert "host=web1" in result.output
        assert "action=#1 base dir" in result.output
        assert "Undefined variable 'base' in parameter 'path'" in result.output

    def test_bad_template_reported(self, write_runbook):
        path = write_runbook(
            "main.tr",
            """
            run:
              - actions:
                  - {action: file, name: base dir, params: {path: "{{ 'x' | nosuchfilter }}/x"}}
            """,
        )
        result = CliRunner().invoke(cli, ["check", str(path)])
        assert result.exit_code == 1
        assert "nosuchfilter" in result.output
        assert "action=#1 base dir" in result.output

    def test_json_valid(self, write_runbook):
        path = write_runbook("main.tr", GROUP_RUNBOOK)
        result = CliRunner().invoke(cli, ["check", str(path), "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["valid"] is True
        assert data["runs"] == [{"name": "deploy", "hosts": {"web1": 1, "web2": 1}}]

    def test_json_invalid(self, write_runbook):
        path = write_runbook("main.tr", "group:\n  - name: web\n  - name: web\n")
        result = CliRunner().invoke(cli, ["check", str(path), "--format", "json"])
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["valid"] is False
        assert data["issues"][0]["kind"] == "duplicate"

    def test_missing_runbook(self, tmp_path):
        result = CliRunner().invoke(cli, ["check", str(tmp_path / "nothing.tr")])
        assert result.exit_code == 1
        assert "Cannot read runbook" in result.output


class TestRunCommand:
    """Tests for `rook run` against in-process executors."""

    def test_successful_run(self, write_runbook, in_process):
        path = write_runbook("main.tr", command_runbook("print(42)"))
        result = CliRunner().invoke(cli, ["run", str(path)])
        assert result.exit_code == 0, result.output
        assert "Run 'greet' on 1 host(s)..." in result.output
        assert "localhost: python changed" in result.output
        assert "Completed: 1 host(s) succeeded (1 changed)" in result.output
        assert in_process[0].channels["localhost"].sent.count("Plan") == 1

    def test_failed_run(self, write_runbook, in_process):
        path = write_runbook("main.tr", command_runbook("raise SystemExit(2)", name="broken"))
        result = CliRunner().invoke(cli, ["run", str(path)])
        assert result.exit_code == 1
        assert "exited with status 2" in result.output
        assert "Run 'broken' failed on 1 host(s)" in result.output

    def test_failed_run_stops_later_runs(self, write_runbook, in_process):
        path = write_runbook(
            "main.tr",
            f"""
            run:
              - name: first
                actions:
                  - {{action: command, params: {{cmd: "{PYTHON}", args: ["-c", "raise SystemExit(1)"]}}}}
              - name: second
                actions:
                  - {{action: command, params: {{cmd: "{PYTHON}", args: ["-c", "print(1)"]}}}}
            """,
        )
        result = CliRunner().invoke(cli, ["run", str(path)])
        assert result.exit_code == 1
        assert "Run 'first'" in result.output
        assert "Run 'second'" not in result.output

    def test_json_output(self, write_runbook, in_process):
        path = write_runbook("main.tr", command_runbook("print(42)"))
        result = CliRunner().invoke(cli, ["run", str(path), "--format", "json"])
        assert result.exit_code == 0, result.output
        records = [json.loads(line) for line in result.output.splitlines()]
        assert records[0]["event"] == "run_start"
        assert records[-1]["event"] == "run_complete"
        assert records[-1]["success"] is True
        outputs = [r.get("output") for r in records if r["event"] == "action" and r["phase"] == "output"]
        assert "42" in outputs

    def test_validation_errors_contact_no_host(self, write_runbook, in_process):
        path = write_runbook(
            "main.tr",
            """
            run:
              - actions:
                  - {action: command, params: {cmd: "{{ program }}"}}
            """,
        )
        result = CliRunner().invoke(cli, ["run", str(path)])
        assert result.exit_code == 1
        assert "Undefined variable 'program'" in result.output
        assert in_process == []

    def test_parallel_range(self, write_runbook, in_process):
        path = write_runbook("main.tr", command_runbook("print(1)"))
        result = CliRunner().invoke(cli, ["run", str(path), "--parallel", "0"])
        assert result.exit_code == 1
        assert "--parallel must be between 1 and 100" in result.output

    def test_bad_config_file(self, write_runbook, in_process, tmp_path):
        path = write_runbook("main.tr", command_runbook("print(1)"))
        config = tmp_path / "config.yml"
        config.write_text("parallel: 3\nspeed: fast\n")
        result = CliRunner().invoke(cli, ["run", str(path), "--config", str(config)])
        assert result.exit_code == 1
        assert "Unknown config setting(s): speed" in result.output

    def test_malformed_config_file(self, write_runbook, in_process, tmp_path):
        path = write_runbook("main.tr", command_runbook("print(1)"))
        config = tmp_path / "config.yml"
        config.write_text("parallel: [1, 2\n")
        result = CliRunner().invoke(cli, ["run", str(path), "--config", str(config)])
        assert result.exit_code == 1
        assert "Invalid YAML in config file" in result.output
        assert in_process == []
