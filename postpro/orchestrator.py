"""Request Orchestrator - Drives one request through the whole pipeline.

    IDLE -> INTERPOLATING -> PRE_SCRIPTING -> BUILDING -> SENDING
         -> NORMALIZING -> TESTING -> DONE

Any error before NORMALIZING moves the pipeline to ABORTED and surfaces as a
single SendAborted. Failing tests are data: the pipeline still reaches DONE,
records history and last-execution metadata, and notifies listeners.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import structlog

from postpro.builder import RequestBuilder
from postpro.errors import PipelineBusyError, PostproError, ScriptWarning, SendAborted
from postpro.interpolation import TemplateInterpolator
from postpro.models import (
    HistoryItem,
    ProcessedResponse,
    RequestDefinition,
    RequestExecution,
    ResponseExecution,
    TestResult,
)
from postpro.normalizer import ResponseNormalizer
from postpro.prerequest import PreRequestInterpreter
from postpro.session import Session
from postpro.test_runner import TestInterpreter
from postpro.transport import TransportExecutor

logger = structlog.get_logger(__name__)

Listener = Callable[[RequestDefinition, ProcessedResponse, list[TestResult]], None]


class PipelineState(Enum):
    IDLE = "idle"
    INTERPOLATING = "interpolating"
    PRE_SCRIPTING = "pre_scripting"
    BUILDING = "building"
    SENDING = "sending"
    NORMALIZING = "normalizing"
    TESTING = "testing"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class PipelineResult:
    """Everything a completed send produced."""

    request: RequestDefinition
    response: ProcessedResponse
    test_results: list[TestResult] = field(default_factory=list)
    warnings: list[ScriptWarning] = field(default_factory=list)

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.test_results if r.passed)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.test_results if not r.passed)

    @property
    def all_passed(self) -> bool:
        return self.failed_count == 0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RequestOrchestrator:
    """Runs requests through interpolation, scripts, transport and tests.

    Usage:
        with TransportExecutor(settings) as executor:
            orchestrator = RequestOrchestrator(session, executor)
            result = orchestrator.send(request)
            print(result.passed_count, result.failed_count)

    One send at a time: starting a second send while one is in flight
    raises PipelineBusyError.
    """

    def __init__(
        self,
        session: Session,
        executor: TransportExecutor,
        builder: RequestBuilder | None = None,
        normalizer: ResponseNormalizer | None = None,
    ) -> None:
        self._session = session
        self._executor = executor
        self._interpolator = TemplateInterpolator(session.store)
        self._pre_request = PreRequestInterpreter(session)
        self._builder = builder or RequestBuilder()
        self._normalizer = normalizer or ResponseNormalizer()
        self._tests = TestInterpreter(session)
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._state = PipelineState.IDLE
        self.transitions: list[PipelineState] = [PipelineState.IDLE]

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def session(self) -> Session:
        return self._session

    def add_listener(self, listener: Listener) -> None:
        """Register a callback for (request, response, test_results) on DONE."""
        self._listeners.append(listener)

    def _enter(self, state: PipelineState) -> None:
        self._state = state
        self.transitions.append(state)
        logger.debug("pipeline.state", state=state.value)

    # =========================================================================
    # Send
    # =========================================================================

    def send(
        self,
        request: RequestDefinition,
        timeout_ms: int | None = None,
        iteration: int = 1,
    ) -> PipelineResult:
        """Send one request and run its tests.

        The stored request is never modified; the pipeline works on a copy.

        Args:
            request: Request as authored.
            timeout_ms: Overrides settings.request_timeout_ms.
            iteration: Exposed to test scripts as pm.info.iteration.

        Returns:
            PipelineResult with the processed request, the response and
            one TestResult per check.

        Raises:
            PipelineBusyError: If another send is in progress.
            SendAborted: If interpolation, the pre-request script, building
                or the network call fails. Nothing is recorded.
        """
        if not self._lock.acquire(blocking=False):
            raise PipelineBusyError("A request is already in progress")
        try:
            self.transitions = [PipelineState.IDLE]
            self._state = PipelineState.IDLE
            return self._run(request, timeout_ms, iteration)
        finally:
            self._lock.release()

    def _run(
        self,
        request: RequestDefinition,
        timeout_ms: int | None,
        iteration: int,
    ) -> PipelineResult:
        stage = PipelineState.INTERPOLATING
        try:
            self._enter(PipelineState.INTERPOLATING)
            resolved = self._interpolator.resolve_request(request)

            stage = PipelineState.PRE_SCRIPTING
            self._enter(PipelineState.PRE_SCRIPTING)
            pre_result = self._pre_request.run(resolved.pre_request_script, resolved)
            processed = pre_result.request

            stage = PipelineState.BUILDING
            self._enter(PipelineState.BUILDING)
            transport_request = self._builder.build(processed)

            stage = PipelineState.SENDING
            self._enter(PipelineState.SENDING)
            start_time = time.perf_counter()
            raw = self._executor.send(
                transport_request,
                timeout_ms=timeout_ms or self._session.settings.request_timeout_ms,
            )
            duration_ms = (time.perf_counter() - start_time) * 1000
        except PostproError as e:
            self._enter(PipelineState.ABORTED)
            logger.warning(
                "pipeline.aborted",
                stage=stage.value,
                request_id=request.id,
                error=str(e),
            )
            raise SendAborted(stage.value, e) from e

        self._enter(PipelineState.NORMALIZING)
        response = self._normalizer.normalize(raw, duration_ms)

        self._enter(PipelineState.TESTING)
        results = self._tests.run(processed.test_script, response, processed, iteration)

        self._enter(PipelineState.DONE)
        logger.info(
            "pipeline.done",
            request_id=request.id,
            status=response.status,
            passed=sum(1 for r in results if r.passed),
            failed=sum(1 for r in results if not r.passed),
        )
        self._record(request, processed, response, results)
        for listener in self._listeners:
            listener(processed, response, results)

        return PipelineResult(
            request=processed,
            response=response,
            test_results=results,
            warnings=pre_result.warnings,
        )

    # =========================================================================
    # Recording
    # =========================================================================

    def _record(
        self,
        original: RequestDefinition,
        processed: RequestDefinition,
        response: ProcessedResponse,
        results: list[TestResult],
    ) -> None:
        """Append history and attach last-execution metadata to stored copies."""
        session = self._session
        timestamp = _now()
        request_execution = RequestExecution(
            timestamp=timestamp,
            method=processed.method,
            url=processed.url,
            headers=dict(processed.headers),
            params=dict(processed.params),
            body=processed.body,
            auth=processed.auth,
            body_type=processed.body_type,
            pre_request_script=processed.pre_request_script,
        )
        response_execution = ResponseExecution(
            timestamp=timestamp,
            status=response.status,
            duration=response.duration,
            size=response.size,
            headers=dict(response.headers),
            body=response.body,
            test_results=list(results),
        )

        history_item = HistoryItem(
            id=str(uuid.uuid4()),
            timestamp=timestamp,
            request=processed.model_copy(deep=True),
            response=response,
            test_results=list(results),
        )

        original.last_request_execution = request_execution
        original.last_response_execution = response_execution
        collections_changed = self._attach(
            (r for c in session.collections for r in c.requests),
            original,
            request_execution,
            response_execution,
        )
        scenarios_changed = self._attach(
            (r for s in session.scenarios for r in s.requests),
            original,
            request_execution,
            response_execution,
        )

        try:
            session.storage.append_history(history_item, session.settings.max_history_items)
            if collections_changed:
                session.storage.save_collections(session.collections)
            if scenarios_changed:
                session.storage.save_scenarios(session.scenarios)
        except (OSError, ValueError) as e:
            logger.error("pipeline.persist_failed", request_id=original.id, error=str(e))

    @staticmethod
    def _attach(
        stored_requests,
        original: RequestDefinition,
        request_execution: RequestExecution,
        response_execution: ResponseExecution,
    ) -> bool:
        changed = False
        for stored in stored_requests:
            if stored.id == original.id:
                stored.last_request_execution = request_execution.model_copy(deep=True)
                stored.last_response_execution = response_execution.model_copy(deep=True)
                changed = True
        return changed
