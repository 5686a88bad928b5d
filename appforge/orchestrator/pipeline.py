"""Generation pipeline orchestrator for appforge.

Drives one generation request through the phase sequence

    planning -> code_generation -> project_adaptation -> build -> succeeded

looping build -> error_recovery -> build while the FixAdvisor grants
another auto-fix attempt. Planning, code generation, project adaptation,
the build itself and fix application are external collaborators; the
orchestrator only sequences them, classifies build failures, and publishes
lifecycle events.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from appforge.core.config import OrchestratorConfig
from appforge.core.exceptions import InvalidTransitionError, PipelineError
from appforge.core.models import (
    BuildError,
    BuildOutcome,
    BuildSucceededEvent,
    CancelledEvent,
    FixSuggestion,
    PhaseCompletedEvent,
    PhaseProgressEvent,
    PhaseStartedEvent,
    PipelineErrorEvent,
    PipelineEvent,
    PipelineOutcome,
    PipelinePhase,
    PipelineStatus,
    RetryRecommendation,
)
from appforge.orchestrator.events import EventChannel
from appforge.orchestrator.metrics import PipelineMetrics
from appforge.recovery.advisor import FixAdvisor
from appforge.recovery.classifier import ErrorClassifier

logger = logging.getLogger("appforge.orchestrator.pipeline")

P = PipelinePhase

ALLOWED_TRANSITIONS: dict[PipelinePhase, frozenset[PipelinePhase]] = {
    P.PLANNING: frozenset({P.CODE_GENERATION, P.FAILED, P.CANCELLED}),
    P.CODE_GENERATION: frozenset({P.PROJECT_ADAPTATION, P.FAILED, P.CANCELLED}),
    P.PROJECT_ADAPTATION: frozenset({P.BUILD, P.FAILED, P.CANCELLED}),
    P.BUILD: frozenset({P.SUCCEEDED, P.ERROR_RECOVERY, P.FAILED, P.CANCELLED}),
    P.ERROR_RECOVERY: frozenset({P.BUILD, P.FAILED, P.CANCELLED}),
    P.SUCCEEDED: frozenset(),
    P.FAILED: frozenset(),
    P.CANCELLED: frozenset(),
}

_PHASE_LABELS = {
    P.PLANNING: "Planning",
    P.CODE_GENERATION: "Code generation",
    P.PROJECT_ADAPTATION: "Project adaptation",
    P.BUILD: "Build",
    P.ERROR_RECOVERY: "Error recovery",
}


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------

class Planner(ABC):
    @abstractmethod
    def plan(self, description: str) -> Any:
        """Turn a free-text app description into a plan (None on failure)."""


class CodeGenerator(ABC):
    @abstractmethod
    def generate(self, plan: Any) -> Any:
        """Render source/layout files for a plan (None on failure)."""


class ProjectAdapter(ABC):
    @abstractmethod
    def adapt(self, project_name: str, plan: Any, generated: Any) -> Any:
        """Lay generated files out as a buildable project (None on failure)."""


class BuildRunner(ABC):
    @abstractmethod
    def build(self, project: Any, attempt: int) -> BuildOutcome:
        """Run the host toolchain once and report success or the build log."""


class FixApplier(ABC):
    @abstractmethod
    def apply(self, project: Any, suggestion: FixSuggestion) -> None:
        """Modify the project according to a fix suggestion before a rebuild."""


class _PhaseFailed(Exception):
    def __init__(self, phase: PipelinePhase, message: str):
        self.phase = phase
        self.message = message
        super().__init__(message)


class _Cancelled(Exception):
    pass


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PipelineOrchestrator:
    """State machine for a single generation request.

    One instance handles exactly one request. run() executes on the calling
    thread; start() runs it on a dedicated single-worker executor. Events
    go to ``events`` and are never awaited. Cancellation is cooperative:
    it is honoured between phases and before every (re)build.
    """

    def __init__(
        self,
        planner: Planner,
        generator: CodeGenerator,
        adapter: ProjectAdapter,
        builder: BuildRunner,
        classifier: Optional[ErrorClassifier] = None,
        advisor: Optional[FixAdvisor] = None,
        fix_applier: Optional[FixApplier] = None,
        events: Optional[EventChannel] = None,
        metrics: Optional[PipelineMetrics] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.planner = planner
        self.generator = generator
        self.adapter = adapter
        self.builder = builder
        self.classifier = classifier or ErrorClassifier()
        self.advisor = advisor or FixAdvisor(self.config.max_auto_fix_attempts)
        self.fix_applier = fix_applier
        self.events = events or EventChannel()
        self.metrics = metrics or PipelineMetrics()

        self._lock = threading.Lock()
        self._phase = P.PLANNING
        self._build_attempts = 0
        self._cancel_requested = threading.Event()
        self._started = False
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def phase(self) -> PipelinePhase:
        with self._lock:
            return self._phase

    @property
    def build_attempts(self) -> int:
        with self._lock:
            return self._build_attempts

    def status(self) -> PipelineStatus:
        with self._lock:
            return PipelineStatus(
                phase=self._phase,
                build_attempts=self._build_attempts,
                max_auto_fix_attempts=self.advisor.max_auto_fix_attempts,
                cancel_requested=self._cancel_requested.is_set(),
            )

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the run already ended."""
        if self.phase.is_terminal:
            return False
        self._cancel_requested.set()
        logger.info("Cancellation requested during %s", self.phase.value)
        return True

    def start(self, description: str, project_name: str) -> Future[PipelineOutcome]:
        """Run the pipeline on a dedicated worker thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="appforge-pipeline")
        return self._executor.submit(self.run, description, project_name)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def run(self, description: str, project_name: str) -> PipelineOutcome:
        """Execute every phase to a terminal state.

        Args:
            description: Natural-language app description for the planner.
            project_name: Name handed to the project adapter.

        Returns:
            PipelineOutcome in SUCCEEDED, FAILED or CANCELLED.
        """
        with self._lock:
            if self._started:
                raise PipelineError("Pipeline already ran; create one orchestrator per request")
            self._started = True

        self.metrics.start_run(project_name)
        outcome = self._run_phases(description, project_name)
        self.metrics.complete_run(outcome.phase.value)
        return outcome

    # ------------------------------------------------------------------
    # Phase sequencing
    # ------------------------------------------------------------------

    def _run_phases(self, description: str, project_name: str) -> PipelineOutcome:
        try:
            self._enter(P.PLANNING, "Planning app architecture...")
            plan = self._execute(
                P.PLANNING, lambda: self.planner.plan(description), "Failed to generate app plan",
            )
            self._progress("App architecture planned", 20)
            self._complete(P.PLANNING, plan)

            self._enter(P.CODE_GENERATION, "Generating source files...")
            generated = self._execute(
                P.CODE_GENERATION, lambda: self.generator.generate(plan), "Failed to generate code",
            )
            self._progress("Code generated successfully", 40)
            self._complete(P.CODE_GENERATION, generated)

            self._enter(P.PROJECT_ADAPTATION, "Creating project structure...")
            project = self._execute(
                P.PROJECT_ADAPTATION,
                lambda: self.adapter.adapt(project_name, plan, generated),
                "Failed to create project",
            )
            self._progress("Project created", 60)
            self._complete(P.PROJECT_ADAPTATION, project)

            return self._build_loop(project)
        except _Cancelled:
            return self._finish_cancelled()
        except _PhaseFailed as e:
            return self._finish_failed(e.phase, e.message)

    def _build_loop(self, project: Any) -> PipelineOutcome:
        while True:
            self._enter(P.BUILD, f"Building artifact (attempt {self.build_attempts + 1})...")
            with self._lock:
                self._build_attempts += 1
                attempt = self._build_attempts

            outcome: BuildOutcome = self._execute(
                P.BUILD,
                lambda: self.builder.build(project, attempt),
                "Build toolchain returned no result",
                attempt=attempt,
                succeeded=lambda o: o.success,
            )
            if outcome.success:
                artifact = outcome.artifact_location or ""
                self._progress("Build finished", 100)
                self._complete(P.BUILD, artifact)
                self._transition(P.SUCCEEDED)
                self._emit(BuildSucceededEvent(artifact_location=artifact))
                return PipelineOutcome(
                    phase=P.SUCCEEDED,
                    build_attempts=attempt,
                    artifact_location=artifact,
                    message="Build succeeded",
                )

            self._enter(P.ERROR_RECOVERY, "Analyzing build errors...")
            error = self.classifier.classify(outcome.log)
            self._progress(f"Error analyzed: {error.message}", 70)
            suggestion = self.advisor.suggest(error)
            self._progress(f"Fix suggestion: {suggestion.action.value}", 75)
            recommendation = self.advisor.recommend_retry(attempt, error)

            if not recommendation.can_retry:
                return self._finish_failed(
                    P.ERROR_RECOVERY,
                    _failure_message(error, suggestion, recommendation),
                    error=error,
                    suggestion=suggestion,
                    recommendation=recommendation,
                )

            if self.fix_applier is not None:
                applier = self.fix_applier
                self._execute(
                    P.ERROR_RECOVERY, lambda: applier.apply(project, suggestion), attempt=attempt,
                )
            self._progress("Retrying build with fixes...", 80)
            self._complete(P.ERROR_RECOVERY, suggestion)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _enter(self, phase: PipelinePhase, detail: str) -> None:
        """Cancellation checkpoint, transition, and phase-started event."""
        if self._cancel_requested.is_set():
            raise _Cancelled()
        if self.phase != phase:
            self._transition(phase)
        logger.info("Phase started: %s", phase.value)
        self._emit(PhaseStartedEvent(phase=phase, detail=detail))

    def _execute(
        self,
        phase: PipelinePhase,
        fn: Callable[[], Any],
        none_message: Optional[str] = None,
        attempt: int = 1,
        succeeded: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Run a collaborator call, converting exceptions into phase failures."""
        metric = self.metrics.start_phase(phase, attempt)
        try:
            value = fn()
        except Exception as e:
            logger.exception("%s raised during pipeline run", _PHASE_LABELS[phase])
            self.metrics.complete_phase(metric, "failure", error=str(e))
            raise _PhaseFailed(phase, f"{_PHASE_LABELS[phase]} failed: {e}") from e

        if value is None and none_message:
            self.metrics.complete_phase(metric, "failure", error=none_message)
            raise _PhaseFailed(phase, none_message)

        ok = succeeded(value) if succeeded else True
        self.metrics.complete_phase(metric, "success" if ok else "failure")
        return value

    def _transition(self, target: PipelinePhase) -> None:
        with self._lock:
            current = self._phase
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(current.value, target.value)
            self._phase = target
        logger.debug("Pipeline transition %s -> %s", current.value, target.value)

    def _emit(self, event: PipelineEvent) -> None:
        self.events.publish(event)

    def _progress(self, message: str, percent: int) -> None:
        self._emit(PhaseProgressEvent(message=message, percent=percent))

    def _complete(self, phase: PipelinePhase, result: Any) -> None:
        self._emit(PhaseCompletedEvent(phase=phase, result=result))

    def _finish_failed(
        self,
        phase: PipelinePhase,
        message: str,
        error: Optional[BuildError] = None,
        suggestion: Optional[FixSuggestion] = None,
        recommendation: Optional[RetryRecommendation] = None,
    ) -> PipelineOutcome:
        self._transition(P.FAILED)
        logger.warning("Pipeline failed in %s: %s", phase.value, message)
        self._emit(PipelineErrorEvent(
            phase=phase,
            message=message,
            fix_text=suggestion.fix_text if suggestion else None,
            confidence=suggestion.confidence if suggestion else None,
            build_error=error,
        ))
        return PipelineOutcome(
            phase=P.FAILED,
            build_attempts=self.build_attempts,
            message=message,
            error=error,
            suggestion=suggestion,
            recommendation=recommendation,
        )

    def _finish_cancelled(self) -> PipelineOutcome:
        interrupted = self.phase
        self._transition(P.CANCELLED)
        logger.info("Pipeline cancelled before %s", interrupted.value)
        reason = "Generation cancelled by user"
        self._emit(CancelledEvent(phase=interrupted, reason=reason))
        return PipelineOutcome(
            phase=P.CANCELLED,
            build_attempts=self.build_attempts,
            message=reason,
        )


def _failure_message(
    error: BuildError,
    suggestion: FixSuggestion,
    recommendation: RetryRecommendation,
) -> str:
    return (
        f"{error.message}. Suggested fix: {suggestion.fix_text} "
        f"(confidence {suggestion.confidence}%). {recommendation.reason}"
    )
