"""Tests for CLI argument parsing and the send, run-scenario and list modes."""

from pathlib import Path

import pytest
import yaml

from postpro import cli
from postpro.cli import (
    EXIT_CONFIG_ERROR,
    EXIT_FAILED,
    EXIT_OK,
    ListArgs,
    RunScenarioArgs,
    SendArgs,
    main,
    parse_args,
)
from tests.conftest import make_executor


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    config = {
        "globals": {"apiUrl": "http://echo.test"},
        "collection_variables": {"col-1": {"itemPath": "items"}},
        "collections": [
            {
                "id": "col-1",
                "name": "Echo",
                "requests": [
                    {
                        "id": "get-items",
                        "name": "Get items",
                        "url": "{{apiUrl}}/items",
                        "pre_request_script": "addHeader X-Test 123",
                        "test_script": "status 200\nechoRequestHeaderEquals X-Test 123",
                    },
                    {
                        "id": "failing",
                        "name": "Failing",
                        "url": "{{apiUrl}}/x",
                        "test_script": "status 404",
                    },
                    {
                        "id": "broken",
                        "name": "Broken",
                        "url": "{{apiUrl}}/y",
                        "pre_request_script": "setUrlWithVar nope",
                    },
                ],
            }
        ],
        "scenarios": [
            {
                "id": "sc-1",
                "name": "Smoke",
                "requests": [{"id": "s1", "url": "{{apiUrl}}/a", "test_script": "status 200"}],
            },
            {
                "id": "sc-2",
                "name": "Collection vars",
                "requests": [
                    {"id": "s2", "url": "{{apiUrl}}/{{itemPath}}", "test_script": "echoRequestUrlContains /items"}
                ],
            },
        ],
    }
    path = tmp_path / "postpro.yaml"
    path.write_text(yaml.safe_dump(config))
    return path


@pytest.fixture
def echo_transport(monkeypatch):
    monkeypatch.setattr(cli, "TransportExecutor", lambda settings: make_executor())


class TestParseArgs:
    def test_send(self):
        args = parse_args(["send", "--config", "ws.yaml", "--collection", "Echo", "--request", "Get items"])
        assert isinstance(args, SendArgs)
        assert args.config == Path("ws.yaml")
        assert args.request == "Get items"
        assert args.timeout is None
        assert args.log_level == "WARNING"
        assert args.log_json is False

    def test_run_scenario_with_timeout(self):
        args = parse_args(["run-scenario", "--config", "ws.yaml", "--scenario", "Smoke", "--timeout", "2.5"])
        assert isinstance(args, RunScenarioArgs)
        assert args.timeout == 2.5
        assert args.collection is None

    def test_run_scenario_with_collection(self):
        args = parse_args(["run-scenario", "--config", "ws.yaml", "--scenario", "Smoke", "--collection", "Echo"])
        assert args.collection == "Echo"

    def test_list_with_logging_options(self):
        args = parse_args(["list", "--config", "ws.yaml", "--log-level", "DEBUG", "--log-json"])
        assert isinstance(args, ListArgs)
        assert args.log_level == "DEBUG"
        assert args.log_json is True

    def test_negative_timeout_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["run-scenario", "--config", "ws.yaml", "--scenario", "s", "--timeout", "-1"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])

    def test_send_requires_request(self):
        with pytest.raises(SystemExit):
            parse_args(["send", "--config", "ws.yaml", "--collection", "Echo"])


class TestMain:
    def test_missing_config(self, tmp_path, capsys):
        code = main(["list", "--config", str(tmp_path / "missing.yaml")])
        assert code == EXIT_CONFIG_ERROR
        assert "Config file not found" in capsys.readouterr().err

    def test_list(self, workspace, capsys):
        assert main(["list", "--config", str(workspace)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "Echo [col-1]" in out
        assert "Get items [get-items]" in out
        assert "Smoke [sc-1] (1 steps)" in out
        assert "Total: 1 collections, 2 scenarios" in out

    def test_send_passing(self, workspace, echo_transport, capsys):
        code = main(["send", "--config", str(workspace), "--collection", "Echo", "--request", "get-items"])
        out = capsys.readouterr().out
        assert code == EXIT_OK
        assert "GET http://echo.test/items" in out
        assert "[PASS] status 200" in out
        assert "[PASS] echoRequestHeaderEquals X-Test 123" in out
        assert "Get items: 2 passed, 0 failed" in out

    def test_send_by_name_with_failure(self, workspace, echo_transport, capsys):
        code = main(["send", "--config", str(workspace), "--collection", "col-1", "--request", "Failing"])
        assert code == EXIT_FAILED
        assert "[FAIL] status 404: Expected status 404, got 200" in capsys.readouterr().out

    def test_send_aborted(self, workspace, echo_transport, capsys):
        code = main(["send", "--config", str(workspace), "--collection", "Echo", "--request", "broken"])
        assert code == EXIT_FAILED
        assert "Request failed during pre_scripting" in capsys.readouterr().err

    def test_unknown_request(self, workspace, capsys):
        code = main(["send", "--config", str(workspace), "--collection", "Echo", "--request", "nope"])
        assert code == EXIT_CONFIG_ERROR
        assert "Request 'nope' not found" in capsys.readouterr().err

    def test_unknown_collection(self, workspace, capsys):
        code = main(["send", "--config", str(workspace), "--collection", "Nope", "--request", "x"])
        assert code == EXIT_CONFIG_ERROR

    def test_run_scenario(self, workspace, echo_transport, capsys):
        code = main(["run-scenario", "--config", str(workspace), "--scenario", "Smoke"])
        out = capsys.readouterr().out
        assert code == EXIT_OK
        assert "Scenario: Smoke" in out
        assert "Total: 1 passed, 0 failed, 0 aborted" in out

    def test_unknown_scenario(self, workspace, capsys):
        code = main(["run-scenario", "--config", str(workspace), "--scenario", "Nope"])
        assert code == EXIT_CONFIG_ERROR

    def test_run_scenario_with_collection_variables(self, workspace, echo_transport, capsys):
        args = ["run-scenario", "--config", str(workspace), "--scenario", "sc-2"]

        assert main(args) == EXIT_FAILED
        capsys.readouterr()

        assert main([*args, "--collection", "Echo"]) == EXIT_OK
        assert "Total: 1 passed, 0 failed, 0 aborted" in capsys.readouterr().out

    def test_run_scenario_unknown_collection(self, workspace, capsys):
        code = main(["run-scenario", "--config", str(workspace), "--scenario", "Smoke", "--collection", "Nope"])
        assert code == EXIT_CONFIG_ERROR
        assert "Collection 'Nope' not found" in capsys.readouterr().err
