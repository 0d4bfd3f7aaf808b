"""Tests for RequestOrchestrator: the full send pipeline."""

import json
from unittest.mock import MagicMock

import httpx
import pytest

from postpro.errors import PipelineBusyError, SendAborted
from postpro.models import BodyType, ClientSettings, Collection, Scenario, VariableScope
from postpro.orchestrator import PipelineState, RequestOrchestrator
from postpro.storage import JsonFileStorage
from tests.conftest import make_executor, make_request

S = PipelineState

HAPPY_PATH = [
    S.IDLE,
    S.INTERPOLATING,
    S.PRE_SCRIPTING,
    S.BUILDING,
    S.SENDING,
    S.NORMALIZING,
    S.TESTING,
    S.DONE,
]


class TestHappyPath:
    def test_transitions(self, orchestrator):
        orchestrator.send(make_request())
        assert orchestrator.transitions == HAPPY_PATH
        assert orchestrator.state == S.DONE

    def test_environment_variable_in_url(self, orchestrator, store):
        store.set(VariableScope.ENVIRONMENT, "apiUrl", "http://localhost:3000")
        result = orchestrator.send(make_request(url="{{apiUrl}}/items"))

        assert result.request.url == "http://localhost:3000/items"
        assert result.response.body["url"] == "http://localhost:3000/items"

    def test_pre_request_header_reaches_server(self, orchestrator):
        request = make_request(pre_request_script="addHeader X-Test 123")
        result = orchestrator.send(request)

        assert result.request.headers == {"X-Test": "123"}
        assert result.response.body["headers"]["x-test"] == "123"

    def test_json_body_round_trip(self, orchestrator, json_request):
        json_request.test_script = 'echoRequestBodyEquals {"a": 1}\nechoRequestMethodEquals POST'
        result = orchestrator.send(json_request)

        echoed = result.response.body
        assert echoed["method"] == "POST"
        assert json.loads(echoed["body"]) == {"a": 1}
        assert echoed["headers"]["content-type"] == "application/json"
        assert [r.passed for r in result.test_results] == [True, True]

    def test_tests_run_against_response(self, orchestrator):
        request = make_request(test_script="status 200\nstatus 404")
        result = orchestrator.send(request)

        assert [r.passed for r in result.test_results] == [True, False]
        assert result.passed_count == 1
        assert result.failed_count == 1
        assert not result.all_passed
        assert orchestrator.state == S.DONE

    def test_sandbox_tests_see_pre_request_changes(self, orchestrator):
        request = make_request(
            pre_request_script="addHeader X-Trace abc",
            test_script='pm.test("trace", () => pm.expect(pm.request.headers.get("X-Trace")).to.equal("abc"));',
        )
        result = orchestrator.send(request)
        assert result.all_passed, result.test_results

    def test_test_script_variables_visible_to_next_send(self, orchestrator, store):
        first = make_request(test_script='pm.environment.set("nextPath", "second")')
        second = make_request(id="req-2", url="http://api.test/{{nextPath}}")

        orchestrator.send(first)
        result = orchestrator.send(second)

        assert result.request.url == "http://api.test/second"

    def test_stored_request_untouched(self, orchestrator, store):
        store.set(VariableScope.GLOBAL, "token", "abc")
        request = make_request(url="http://api.test/{{token}}", pre_request_script="addHeader X 1")
        orchestrator.send(request)

        assert request.url == "http://api.test/{{token}}"
        assert request.headers == {}

    def test_warnings_surface(self, orchestrator):
        result = orchestrator.send(make_request(pre_request_script="frobnicate now"))
        assert [w.message for w in result.warnings] == ["Unknown command: frobnicate"]


class TestAbort:
    def test_undefined_variable_in_pre_request(self, session):
        executor = MagicMock()
        orchestrator = RequestOrchestrator(session, executor)
        request = make_request(pre_request_script="setUrlWithVar missingVar")

        with pytest.raises(SendAborted) as exc_info:
            orchestrator.send(request)

        assert exc_info.value.stage == "pre_scripting"
        assert "missingVar" in str(exc_info.value)
        assert orchestrator.transitions[-1] == S.ABORTED
        assert S.SENDING not in orchestrator.transitions
        executor.send.assert_not_called()

    def test_invalid_url(self, orchestrator):
        with pytest.raises(SendAborted) as exc_info:
            orchestrator.send(make_request(url="{{nowhere}}/items"))
        assert exc_info.value.stage == "interpolating"
        assert orchestrator.transitions == [S.IDLE, S.INTERPOLATING, S.ABORTED]

    def test_invalid_json_body(self, orchestrator):
        request = make_request(body="{nope", body_type=BodyType.JSON)
        with pytest.raises(SendAborted) as exc_info:
            orchestrator.send(request)
        assert exc_info.value.stage == "building"

    def test_network_error(self, session, storage):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        executor = make_executor(refuse)
        try:
            orchestrator = RequestOrchestrator(session, executor)
            request = make_request(test_script="status 200")
            with pytest.raises(SendAborted) as exc_info:
                orchestrator.send(request)
        finally:
            executor.close()

        assert exc_info.value.stage == "sending"
        assert storage.get_history() == []
        assert request.last_response_execution is None

    def test_orchestrator_reusable_after_abort(self, orchestrator):
        with pytest.raises(SendAborted):
            orchestrator.send(make_request(url=""))
        orchestrator.send(make_request())
        assert orchestrator.state == S.DONE


class TestRecording:
    def test_history_appended(self, orchestrator, storage):
        orchestrator.send(make_request(url="http://api.test/one"))
        orchestrator.send(make_request(url="http://api.test/two"))

        history = storage.get_history()
        assert [h.request.url for h in history] == ["http://api.test/two", "http://api.test/one"]
        assert history[0].response.status == 200

    def test_history_limit(self, session, echo_executor, storage):
        session.settings = ClientSettings(max_history_items=2)
        orchestrator = RequestOrchestrator(session, echo_executor)
        for _ in range(3):
            orchestrator.send(make_request())
        assert len(storage.get_history()) == 2

    def test_last_execution_metadata(self, orchestrator):
        request = make_request(test_script="status 200")
        orchestrator.send(request)

        assert request.last_request_execution.url == "http://api.test/items"
        assert request.last_response_execution.status == 200
        assert request.last_response_execution.test_results[0].passed

    def test_stored_copies_updated_and_saved(self, orchestrator, session, storage):
        stored = make_request(id="shared")
        session.collections.append(Collection(id="c", name="Col", requests=[stored]))
        session.scenarios.append(Scenario(id="s", name="Flow", requests=[stored.model_copy(deep=True)]))

        orchestrator.send(stored.model_copy(deep=True))

        assert stored.last_response_execution.status == 200
        assert session.scenarios[0].requests[0].last_response_execution.status == 200
        assert storage.get_collections()[0].requests[0].last_response_execution is not None
        assert storage.get_scenarios()[0].requests[0].last_response_execution is not None

    def test_unrelated_requests_not_saved(self, orchestrator, session, storage):
        session.collections.append(Collection(id="c", requests=[make_request(id="other")]))
        orchestrator.send(make_request())
        assert storage.get_collections() == []

    def test_listeners_notified(self, orchestrator):
        seen = []
        orchestrator.add_listener(lambda req, resp, results: seen.append((req.url, resp.status, len(results))))

        orchestrator.send(make_request(test_script="status 200"))

        assert seen == [("http://api.test/items", 200, 1)]


class TestConcurrency:
    def test_second_send_while_busy(self, orchestrator):
        errors = []

        def reenter(req, resp, results):
            try:
                orchestrator.send(make_request(id="again"))
            except PipelineBusyError as e:
                errors.append(str(e))

        orchestrator.add_listener(reenter)
        orchestrator.send(make_request())

        assert errors == ["A request is already in progress"]
        assert orchestrator.state == S.DONE


class TestIsolation:
    def test_script_error_in_testing_stage_still_completes(self, orchestrator, storage):
        request = make_request(
            test_script='pm.test("slice", function () { pm.expect("abc".slice(1/0)).to.equal(""); });'
            "\nconst n = " + "(" * 3000 + "1" + ")" * 3000 + ";"
        )
        result = orchestrator.send(request)

        assert orchestrator.transitions == HAPPY_PATH
        assert [r.name for r in result.test_results] == ["Script Execution Error"]
        assert "nested too deeply" in result.test_results[0].error
        assert len(storage.get_history()) == 1

    def test_infinite_slice_passes(self, orchestrator):
        request = make_request(
            test_script='pm.test("slice", function () { pm.expect("abc".slice(1/0)).to.equal(""); });'
        )
        result = orchestrator.send(request)
        assert result.all_passed, result.test_results
        assert orchestrator.state == S.DONE

    def test_corrupt_history_file_does_not_fail_send(self, session, echo_executor, tmp_path):
        session.storage = JsonFileStorage(tmp_path)
        (tmp_path / "history.json").write_text("{not json")
        orchestrator = RequestOrchestrator(session, echo_executor)
        seen = []
        orchestrator.add_listener(lambda req, resp, results: seen.append(resp.status))

        result = orchestrator.send(make_request(test_script="status 200"))

        assert result.all_passed
        assert seen == [200]
        assert orchestrator.state == S.DONE
