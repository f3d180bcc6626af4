"""
Tests for the atelier command line.
"""

import argparse
import json
import logging

import pytest

from atelier.cli import cmd_run, cmd_validate
from atelier.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

PASS_THROUGH = {
    "id": "echo",
    "nodes": [
        {"id": "start", "kind": "input", "config": {"fields": ["imageUrl"]}},
        {"id": "end", "kind": "output"},
    ],
    "edges": [{"source": "start", "target": "end"}],
}


@pytest.fixture(autouse=True)
def empty_config(tmp_path, monkeypatch):
    monkeypatch.setenv("ATELIER_CONFIG", str(tmp_path / "configuration.json"))


def write_pipeline(tmp_path, data):
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps(data))
    return str(path)


class TestValidate:
    def test_valid_pipeline(self, tmp_path, capsys):
        pipeline = write_pipeline(tmp_path, PASS_THROUGH)
        args = argparse.Namespace(pipeline=pipeline, allow_cycles=False)

        assert cmd_validate(args) == 0
        assert "✓ echo" in capsys.readouterr().out

    def test_invalid_pipeline(self, tmp_path, capsys):
        broken = {"id": "broken", "nodes": [{"id": "p", "kind": "provider"}]}
        args = argparse.Namespace(pipeline=write_pipeline(tmp_path, broken), allow_cycles=False)

        assert cmd_validate(args) == 1
        assert "INVALID_CONFIG" in capsys.readouterr().out

    def test_unreadable_file(self, tmp_path, capsys):
        args = argparse.Namespace(pipeline=str(tmp_path / "absent.json"), allow_cycles=False)

        assert cmd_validate(args) == 1
        assert "cannot read" in capsys.readouterr().err


class TestRun:
    def test_run_prints_result(self, tmp_path, capsys):
        args = argparse.Namespace(
            pipeline=write_pipeline(tmp_path, PASS_THROUGH),
            form='{"imageUrl": "dress.jpg", "secret": "x"}',
            user="u_1",
            store=str(tmp_path / "store"),
        )

        assert cmd_run(args) == 0
        printed = json.loads(capsys.readouterr().out)
        assert printed["status"] == "succeeded"
        assert printed["output"] == {"imageUrl": "dress.jpg"}
        assert (tmp_path / "store" / "runs" / printed["runId"] / "run.json").exists()

    def test_bad_form_json(self, tmp_path, capsys):
        args = argparse.Namespace(
            pipeline=write_pipeline(tmp_path, PASS_THROUGH),
            form="{nope",
            user=None,
            store=str(tmp_path / "store"),
        )

        assert cmd_run(args) == 1


class TestLogging:
    @pytest.fixture
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        clear_trace_context()

    def test_json_format_emits_trace_context(self, capsys, restore_root_logger):
        configure_logging(level="INFO", format="json")
        clear_trace_context()
        set_trace_context(run_id="run_1")
        set_trace_context(node_id="tryon")

        assert get_trace_context() == {"run_id": "run_1", "node_id": "tryon"}
        logging.getLogger("atelier.test").info("hello")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["message"] == "hello"
        assert record["run_id"] == "run_1"
        assert record["node_id"] == "tryon"
