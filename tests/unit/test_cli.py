"""Tests for CLI commands."""
import json

import pytest
import yaml

from stepflow.cli import main


GRAPH = {
    "id": "greeting",
    "name": "Greeting",
    "steps": [
        {"id": "t", "type": "manualTrigger"},
        {"id": "s", "type": "set", "parameters": {"values": {"greeting": "hi {{ $json.name }}"}}},
    ],
    "connections": [
        {"sourceStepId": "t", "sourcePort": "main", "targetStepId": "s", "targetPort": "main"},
    ],
}


@pytest.fixture
def graph_file(tmp_path):
    path = tmp_path / "graph.json"
    path.write_text(json.dumps(GRAPH))
    return path


def _output(capsys):
    return json.loads(capsys.readouterr().out)


class TestValidateCommand:
    """Test `stepflow validate`."""

    def test_valid_graph(self, graph_file, capsys):
        assert main(["validate", str(graph_file)]) == 0

        assert _output(capsys)["valid"] is True

    def test_invalid_graph(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        bad = dict(GRAPH, steps=GRAPH["steps"] + [{"id": "x", "type": "nope"}])
        path.write_text(yaml.safe_dump(bad))

        assert main(["validate", str(path)]) == 1

        output = _output(capsys)
        assert output["valid"] is False
        assert output["errors"][0]["stepId"] == "x"

    def test_missing_file(self, tmp_path, capsys):
        assert main(["validate", str(tmp_path / "absent.json")]) == 1

        assert "Cannot load graph" in _output(capsys)["error"]


class TestRunCommand:
    """Test `stepflow run`."""

    def test_run_with_input(self, graph_file, capsys):
        code = main(["run", str(graph_file), "--input", '[{"name": "ada"}, {"name": "bob"}]', "--timeout", "10"])

        output = _output(capsys)
        assert code == 0
        assert output["status"] == "succeeded"
        assert output["steps"]["s"]["items"] == 2

    def test_full_state(self, graph_file, capsys):
        assert main(["run", str(graph_file), "--input", '{"name": "ada"}', "--full", "--timeout", "10"]) == 0

        output = _output(capsys)
        payload = output["steps"]["s"]["outputs"]["main"][0]["payload"]
        assert payload == {"name": "ada", "greeting": "hi ada"}

    def test_input_file(self, graph_file, tmp_path, capsys):
        seed = tmp_path / "seed.json"
        seed.write_text('{"name": "cy"}')

        assert main(["run", str(graph_file), "--input-file", str(seed), "--timeout", "10"]) == 0

    def test_bad_input_json(self, graph_file, capsys):
        assert main(["run", str(graph_file), "--input", "{nope"]) == 2

        assert "Invalid input" in _output(capsys)["error"]

    def test_invalid_graph_not_run(self, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps(dict(GRAPH, steps=[{"id": "x", "type": "nope"}], connections=[])))

        assert main(["run", str(path)]) == 1
        assert _output(capsys)["valid"] is False


class TestStepsCommand:
    def test_lists_core_steps(self, capsys):
        assert main(["steps"]) == 0

        steps = {entry["type"]: entry for entry in _output(capsys)}
        assert {"manualTrigger", "set", "code", "httpRequest", "loop", "merge"} <= set(steps)
        assert steps["loop"]["iterative"] is True
        assert steps["loop"]["outputs"] == ["loop", "done"]
        assert steps["manualTrigger"]["trigger"] is True
