"""Scenario Runner - Sends a scenario's requests one after another.

Steps share one orchestrator and therefore one variable store, so a value a
test script stores in step 1 is visible to step 2's pre-request script.
An aborted step is recorded and the run moves on to the next step.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from postpro.errors import SendAborted
from postpro.models import Scenario
from postpro.orchestrator import PipelineResult, RequestOrchestrator

logger = structlog.get_logger(__name__)


@dataclass
class StepOutcome:
    """Result of one scenario step. Exactly one of result/error is set."""

    request_id: str
    request_name: str
    result: PipelineResult | None = None
    error: SendAborted | None = None

    @property
    def aborted(self) -> bool:
        return self.error is not None

    @property
    def passed(self) -> bool:
        return self.result is not None and self.result.all_passed


@dataclass
class ScenarioRunResult:
    scenario_id: str
    scenario_name: str
    steps: list[StepOutcome] = field(default_factory=list)

    @property
    def passed_tests(self) -> int:
        return sum(s.result.passed_count for s in self.steps if s.result is not None)

    @property
    def failed_tests(self) -> int:
        return sum(s.result.failed_count for s in self.steps if s.result is not None)

    @property
    def aborted_steps(self) -> int:
        return sum(1 for s in self.steps if s.aborted)

    @property
    def success(self) -> bool:
        return all(s.passed for s in self.steps)


class ScenarioRunner:
    """Runs every request of a scenario in order.

    Usage:
        runner = ScenarioRunner(orchestrator)
        outcome = runner.run(scenario)
        print(outcome.passed_tests, outcome.failed_tests)
    """

    def __init__(self, orchestrator: RequestOrchestrator) -> None:
        self._orchestrator = orchestrator

    def run(self, scenario: Scenario, timeout_ms: int | None = None) -> ScenarioRunResult:
        outcome = ScenarioRunResult(scenario_id=scenario.id, scenario_name=scenario.name)
        logger.info("scenario.start", scenario=scenario.name, steps=len(scenario.requests))

        for iteration, request in enumerate(scenario.requests, start=1):
            step = StepOutcome(request_id=request.id, request_name=request.name)
            try:
                step.result = self._orchestrator.send(
                    request, timeout_ms=timeout_ms, iteration=iteration
                )
            except SendAborted as e:
                step.error = e
                logger.warning(
                    "scenario.step_aborted",
                    scenario=scenario.name,
                    request=request.name,
                    stage=e.stage,
                )
            outcome.steps.append(step)

        logger.info(
            "scenario.done",
            scenario=scenario.name,
            passed=outcome.passed_tests,
            failed=outcome.failed_tests,
            aborted=outcome.aborted_steps,
        )
        return outcome
