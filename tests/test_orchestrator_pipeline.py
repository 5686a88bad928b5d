"""Tests for appforge/orchestrator/pipeline.py: generation state machine."""

from __future__ import annotations

import threading
from typing import Any, Optional

import pytest

from appforge.core.config import OrchestratorConfig
from appforge.core.exceptions import InvalidTransitionError, PipelineError
from appforge.core.models import (
    BuildErrorType,
    BuildOutcome,
    BuildSucceededEvent,
    CancelledEvent,
    FixAction,
    FixSuggestion,
    PhaseProgressEvent,
    PhaseStartedEvent,
    PipelineErrorEvent,
    PipelinePhase,
)
from appforge.orchestrator.events import EventChannel, EventDispatcher, PipelineListener
from appforge.orchestrator.metrics import PipelineMetrics
from appforge.orchestrator.pipeline import (
    ALLOWED_TRANSITIONS,
    BuildRunner,
    CodeGenerator,
    FixApplier,
    PipelineOrchestrator,
    Planner,
    ProjectAdapter,
)
from appforge.recovery.advisor import MAX_ATTEMPTS_REASON, NOT_RECOVERABLE_REASON

SYNTAX_LOG = "MainActivity.java:42: error: syntax error, insert ';' to complete statement"
UNKNOWN_LOG = "Gradle daemon disappeared unexpectedly"


class StubPlanner(Planner):
    """Planner returning a fixed plan, None, or raising."""

    def __init__(self, plan: Any = "plan", exc: Optional[Exception] = None):
        self._plan = plan
        self._exc = exc
        self.calls = 0

    def plan(self, description):
        self.calls += 1
        if self._exc:
            raise self._exc
        return self._plan


class StubGenerator(CodeGenerator):
    def __init__(self, exc: Optional[Exception] = None):
        self._exc = exc
        self.calls = 0

    def generate(self, plan):
        self.calls += 1
        if self._exc:
            raise self._exc
        return {"MainActivity.java": "class MainActivity {}"}


class StubAdapter(ProjectAdapter):
    def adapt(self, project_name, plan, generated):
        return f"/projects/{project_name}"


class ScriptedBuilder(BuildRunner):
    """Replays build outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: Optional[BuildOutcome]):
        self._outcomes = list(outcomes)
        self.attempts: list[int] = []

    def build(self, project, attempt):
        self.attempts.append(attempt)
        index = min(len(self.attempts), len(self._outcomes)) - 1
        return self._outcomes[index]


class RecordingFixApplier(FixApplier):
    def __init__(self, exc: Optional[Exception] = None):
        self.applied: list[FixSuggestion] = []
        self._exc = exc

    def apply(self, project, suggestion):
        if self._exc:
            raise self._exc
        self.applied.append(suggestion)


def _failed_build(log: str = SYNTAX_LOG) -> BuildOutcome:
    return BuildOutcome(success=False, log=log)


def _orchestrator(
    builder: BuildRunner,
    planner: Optional[Planner] = None,
    generator: Optional[CodeGenerator] = None,
    fix_applier: Optional[FixApplier] = None,
    max_auto_fix_attempts: int = 2,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        planner=planner or StubPlanner(),
        generator=generator or StubGenerator(),
        adapter=StubAdapter(),
        builder=builder,
        fix_applier=fix_applier,
        config=OrchestratorConfig(max_auto_fix_attempts=max_auto_fix_attempts),
    )


def _of_type(events: list, cls: type) -> list:
    return [e for e in events if isinstance(e, cls)]


class TestHappyPath:
    def test_linear_success(self, ok_build):
        orch = _orchestrator(ScriptedBuilder(ok_build))

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.succeeded
        assert outcome.build_attempts == 1
        assert outcome.artifact_location == "/builds/app-debug.apk"
        assert orch.phase == PipelinePhase.SUCCEEDED

    def test_event_sequence(self, ok_build):
        orch = _orchestrator(ScriptedBuilder(ok_build))
        orch.run("A todo list app", "Todo")
        events = orch.events.drain()

        started = [e.phase for e in _of_type(events, PhaseStartedEvent)]
        assert started == [
            PipelinePhase.PLANNING,
            PipelinePhase.CODE_GENERATION,
            PipelinePhase.PROJECT_ADAPTATION,
            PipelinePhase.BUILD,
        ]
        percents = [e.percent for e in _of_type(events, PhaseProgressEvent)]
        assert percents == [20, 40, 60, 100]
        assert isinstance(events[-1], BuildSucceededEvent)
        assert events[-1].artifact_location == "/builds/app-debug.apk"
        assert not _of_type(events, PipelineErrorEvent)

    def test_metrics_recorded(self, ok_build):
        orch = _orchestrator(ScriptedBuilder(ok_build))
        orch.run("A todo list app", "Todo")

        run = orch.metrics.get_latest_run()
        assert run.outcome == "succeeded"
        assert [m.phase for m in run.phase_metrics] == [
            PipelinePhase.PLANNING,
            PipelinePhase.CODE_GENERATION,
            PipelinePhase.PROJECT_ADAPTATION,
            PipelinePhase.BUILD,
        ]
        assert all(m.succeeded for m in run.phase_metrics)


class TestCollaboratorFailures:
    def test_planner_returns_nothing(self, ok_build):
        generator = StubGenerator()
        orch = _orchestrator(ScriptedBuilder(ok_build), planner=StubPlanner(plan=None), generator=generator)

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.FAILED
        assert outcome.message == "Failed to generate app plan"
        assert generator.calls == 0
        errors = _of_type(orch.events.drain(), PipelineErrorEvent)
        assert len(errors) == 1
        assert errors[0].phase == PipelinePhase.PLANNING

    def test_collaborator_exception_becomes_failed(self, ok_build):
        orch = _orchestrator(
            ScriptedBuilder(ok_build),
            generator=StubGenerator(exc=RuntimeError("model overloaded")),
        )

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.FAILED
        error = _of_type(orch.events.drain(), PipelineErrorEvent)[0]
        assert error.phase == PipelinePhase.CODE_GENERATION
        assert error.message == "Code generation failed: model overloaded"
        assert "Traceback" not in error.message

    def test_build_runner_returns_nothing(self):
        orch = _orchestrator(ScriptedBuilder(None))

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.FAILED
        assert outcome.message == "Build toolchain returned no result"

    def test_fix_applier_exception(self, ok_build):
        orch = _orchestrator(
            ScriptedBuilder(_failed_build(), ok_build),
            fix_applier=RecordingFixApplier(exc=OSError("disk full")),
        )

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.FAILED
        assert outcome.message == "Error recovery failed: disk full"


class TestErrorRecovery:
    def test_recoverable_failure_then_success(self, ok_build):
        builder = ScriptedBuilder(_failed_build(), ok_build)
        applier = RecordingFixApplier()
        orch = _orchestrator(builder, fix_applier=applier)

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.succeeded
        assert outcome.build_attempts == 2
        assert builder.attempts == [1, 2]
        assert len(applier.applied) == 1
        assert applier.applied[0].action == FixAction.REGENERATE_UNIT

        events = orch.events.drain()
        progress = {e.percent: e.message for e in _of_type(events, PhaseProgressEvent)}
        assert progress[70] == "Error analyzed: Syntax error at line 42"
        assert progress[75] == "Fix suggestion: regenerate-unit"
        assert progress[80] == "Retrying build with fixes..."
        started = [e.phase for e in _of_type(events, PhaseStartedEvent)]
        assert started[-3:] == [PipelinePhase.BUILD, PipelinePhase.ERROR_RECOVERY, PipelinePhase.BUILD]

    def test_retry_ceiling_ends_in_failed(self):
        builder = ScriptedBuilder(_failed_build())
        orch = _orchestrator(builder)

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.FAILED
        assert builder.attempts == [1, 2]
        assert outcome.build_attempts == 2
        assert outcome.recommendation.attempt_number == 3
        assert outcome.error.type == BuildErrorType.SYNTAX_ERROR
        assert not outcome.recommendation.can_retry
        assert outcome.recommendation.reason == MAX_ATTEMPTS_REASON

        error = _of_type(orch.events.drain(), PipelineErrorEvent)[-1]
        assert error.phase == PipelinePhase.ERROR_RECOVERY
        assert error.fix_text == outcome.suggestion.fix_text
        assert error.confidence == 60
        assert MAX_ATTEMPTS_REASON in error.message
        assert "confidence 60%" in error.message

    def test_zero_auto_fix_attempts(self):
        builder = ScriptedBuilder(_failed_build())
        orch = _orchestrator(builder, max_auto_fix_attempts=0)

        assert orch.run("A todo list app", "Todo").phase == PipelinePhase.FAILED
        assert builder.attempts == [1]

    def test_ceiling_counts_builds_already_run(self):
        builder = ScriptedBuilder(_failed_build())
        orch = _orchestrator(builder, max_auto_fix_attempts=1)

        outcome = orch.run("A todo list app", "Todo")

        assert builder.attempts == [1]
        assert outcome.recommendation.attempt_number == 2
        assert outcome.recommendation.reason == MAX_ATTEMPTS_REASON

    def test_unrecoverable_failure_stops_immediately(self):
        builder = ScriptedBuilder(_failed_build(UNKNOWN_LOG))
        orch = _orchestrator(builder)

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.FAILED
        assert builder.attempts == [1]
        assert outcome.error.type == BuildErrorType.UNKNOWN
        assert outcome.recommendation.reason == NOT_RECOVERABLE_REASON
        assert outcome.suggestion.confidence == 30

    def test_failed_build_metric_marked_failure(self, ok_build):
        orch = _orchestrator(ScriptedBuilder(_failed_build(), ok_build))
        orch.run("A todo list app", "Todo")

        builds = [m for m in orch.metrics.get_latest_run().phase_metrics if m.phase == PipelinePhase.BUILD]
        assert [m.status for m in builds] == ["failure", "success"]
        assert [m.attempt for m in builds] == [1, 2]


class TestCancellation:
    def test_cancel_before_run(self, ok_build):
        planner = StubPlanner()
        orch = _orchestrator(ScriptedBuilder(ok_build), planner=planner)

        assert orch.cancel()
        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.CANCELLED
        assert planner.calls == 0
        events = orch.events.drain()
        assert len(events) == 1
        assert isinstance(events[0], CancelledEvent)
        assert events[0].phase == PipelinePhase.PLANNING

    def test_cancel_honoured_between_phases(self, ok_build):
        generator = StubGenerator()
        holder: dict[str, PipelineOrchestrator] = {}

        class CancellingPlanner(Planner):
            def plan(self, description):
                holder["orch"].cancel()
                return "plan"

        orch = _orchestrator(ScriptedBuilder(ok_build), planner=CancellingPlanner(), generator=generator)
        holder["orch"] = orch

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.CANCELLED
        assert generator.calls == 0

    def test_cancel_during_build_prevents_rebuild(self, ok_build):
        holder: dict[str, PipelineOrchestrator] = {}

        class CancellingBuilder(BuildRunner):
            def __init__(self):
                self.attempts = 0

            def build(self, project, attempt):
                self.attempts += 1
                holder["orch"].cancel()
                return _failed_build()

        builder = CancellingBuilder()
        orch = _orchestrator(builder)
        holder["orch"] = orch

        outcome = orch.run("A todo list app", "Todo")

        assert outcome.phase == PipelinePhase.CANCELLED
        assert builder.attempts == 1
        cancelled = _of_type(orch.events.drain(), CancelledEvent)[0]
        assert cancelled.phase == PipelinePhase.BUILD

    def test_cancel_after_finish_is_refused(self, ok_build):
        orch = _orchestrator(ScriptedBuilder(ok_build))
        orch.run("A todo list app", "Todo")
        assert not orch.cancel()
        assert orch.phase == PipelinePhase.SUCCEEDED


class TestStateMachine:
    def test_terminal_phases_have_no_exits(self):
        for phase in PipelinePhase:
            if phase.is_terminal:
                assert ALLOWED_TRANSITIONS[phase] == frozenset()

    def test_every_active_phase_can_fail_or_cancel(self):
        for phase in PipelinePhase:
            if not phase.is_terminal:
                assert PipelinePhase.FAILED in ALLOWED_TRANSITIONS[phase]
                assert PipelinePhase.CANCELLED in ALLOWED_TRANSITIONS[phase]

    def test_illegal_transition_raises(self, ok_build):
        orch = _orchestrator(ScriptedBuilder(ok_build))
        with pytest.raises(InvalidTransitionError):
            orch._transition(PipelinePhase.SUCCEEDED)

    def test_single_use(self, ok_build):
        orch = _orchestrator(ScriptedBuilder(ok_build))
        orch.run("A todo list app", "Todo")
        with pytest.raises(PipelineError):
            orch.run("A todo list app", "Todo")

    def test_status(self, ok_build):
        orch = _orchestrator(ScriptedBuilder(_failed_build(), ok_build))
        before = orch.status()
        assert before.phase == PipelinePhase.PLANNING
        assert before.build_attempts == 0
        assert before.max_auto_fix_attempts == 2

        orch.run("A todo list app", "Todo")
        after = orch.status()
        assert after.phase == PipelinePhase.SUCCEEDED
        assert after.build_attempts == 2
        assert not after.cancel_requested


class TestWorkerAndListener:
    def test_start_runs_on_worker_thread(self, ok_build):
        seen: dict[str, str] = {}

        class ThreadNotingPlanner(Planner):
            def plan(self, description):
                seen["thread"] = threading.current_thread().name
                return "plan"

        orch = _orchestrator(ScriptedBuilder(ok_build), planner=ThreadNotingPlanner())
        try:
            outcome = orch.start("A todo list app", "Todo").result(timeout=5)
        finally:
            orch.shutdown()

        assert outcome.succeeded
        assert seen["thread"].startswith("appforge-pipeline")

    def test_listener_receives_events(self, ok_build):
        class Collecting(PipelineListener):
            def __init__(self):
                self.successes: list[str] = []
                self.phases: list[PipelinePhase] = []
                self.done = threading.Event()

            def on_phase_started(self, phase, detail):
                self.phases.append(phase)

            def on_build_success(self, artifact_location):
                self.successes.append(artifact_location)
                self.done.set()

        channel = EventChannel()
        listener = Collecting()
        dispatcher = EventDispatcher(channel, listener).start()
        orch = PipelineOrchestrator(
            planner=StubPlanner(),
            generator=StubGenerator(),
            adapter=StubAdapter(),
            builder=ScriptedBuilder(ok_build),
            events=channel,
            metrics=PipelineMetrics(),
        )

        orch.run("A todo list app", "Todo")

        assert listener.done.wait(timeout=2)
        dispatcher.stop()
        assert listener.successes == ["/builds/app-debug.apk"]
        assert listener.phases[0] == PipelinePhase.PLANNING
