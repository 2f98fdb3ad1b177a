import logging

import pytest
from click.testing import CliRunner

from loom.cli import cli


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    # The CLI points the root handler at CliRunner's stream, which is closed afterwards
    root = logging.getLogger()
    for handler in list(root.handlers):
        if type(handler) is not logging.StreamHandler:
            continue
        root.removeHandler(handler)


PASSING = """
jobs:
  build:
    steps:
      - name: Compile
        run: echo compiling > out.txt
  test:
    needs: [build]
    steps:
      - name: Check
        run: cat out.txt
"""

FAILING = """
jobs:
  build:
    steps:
      - name: Break
        run: exit 4
  test:
    needs: [build]
    steps:
      - run: echo never
"""

CYCLIC = """
jobs:
  a:
    needs: [b]
    steps: [{run: "true"}]
  b:
    needs: [a]
    steps: [{run: "true"}]
"""


def _write(tmp_path, text):
    path = tmp_path / ".loom.yml"
    path.write_text(text)
    return str(path)


def test_validate_ok(tmp_path):
    result = CliRunner().invoke(cli, ["validate", "--config", _write(tmp_path, PASSING)])
    assert result.exit_code == 0
    assert "OK (2 jobs)" in result.output


def test_validate_rejects_cycle(tmp_path):
    result = CliRunner().invoke(cli, ["validate", "--config", _write(tmp_path, CYCLIC)])
    assert result.exit_code == 1
    assert "Circular dependency" in result.output


def test_validate_missing_file(tmp_path):
    result = CliRunner().invoke(cli, ["validate", "--config", str(tmp_path / "nope.yml")])
    assert result.exit_code == 1
    assert "Workflow file not found" in result.output


def test_plan_prints_stages(tmp_path):
    result = CliRunner().invoke(cli, ["plan", "--config", _write(tmp_path, PASSING)])
    assert result.exit_code == 0
    assert "Stage 1: build" in result.output
    assert "Stage 2: test" in result.output


def test_run_on_host(tmp_path):
    config = _write(tmp_path, PASSING)
    result = CliRunner().invoke(
        cli, ["run", "--config", config, "--workspace", str(tmp_path), "--runtime", "host"]
    )
    assert result.exit_code == 0, result.output
    assert "[test/Check] compiling" in result.output
    assert "build: SUCCESS" in result.output
    assert "test: SUCCESS" in result.output


def test_run_failure_skips_dependents(tmp_path):
    config = _write(tmp_path, FAILING)
    result = CliRunner().invoke(
        cli, ["run", "--config", config, "--workspace", str(tmp_path), "--runtime", "host"]
    )
    assert result.exit_code == 1
    assert "build: FAILED (step 'Break' exit=4)" in result.output
    assert "test: SKIPPED" in result.output
