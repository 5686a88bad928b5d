"""Pipeline metrics collector for appforge.

Records per-phase execution data during pipeline runs:
  {phase, attempt, started_at, completed_at, duration_seconds, status, error}

Enables: status output with per-phase timing and bottleneck identification.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Optional

from appforge.core.models import PipelinePhase

logger = logging.getLogger("appforge.orchestrator.metrics")


@dataclass
class PhaseMetric:
    """Single phase execution record within a pipeline run."""
    phase: PipelinePhase
    attempt: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    status: str = "pending"
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass
class PipelineRun:
    """Aggregated metrics for one end-to-end generation request."""
    project_name: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None
    phase_metrics: list[PhaseMetric] = field(default_factory=list)
    outcome: str = "in_progress"  # "succeeded", "failed", "cancelled"

    @property
    def total_duration(self) -> float:
        return sum(m.duration_seconds for m in self.phase_metrics)

    @property
    def bottleneck_phase(self) -> Optional[PipelinePhase]:
        if not self.phase_metrics:
            return None
        slowest = max(self.phase_metrics, key=lambda m: m.duration_seconds)
        return slowest.phase


class PipelineMetrics:
    """Collects phase timings for orchestrator runs."""

    def __init__(self):
        self._runs: list[PipelineRun] = []
        self._current_run: Optional[PipelineRun] = None
        self._lock = threading.Lock()

    def start_run(self, project_name: str) -> PipelineRun:
        run = PipelineRun(project_name=project_name)
        with self._lock:
            self._current_run = run
            self._runs.append(run)
        logger.info("Pipeline run started for project '%s'", project_name)
        return run

    def start_phase(self, phase: PipelinePhase, attempt: int = 1) -> PhaseMetric:
        metric = PhaseMetric(phase=phase, attempt=attempt, started_at=datetime.now(UTC))
        with self._lock:
            if self._current_run:
                self._current_run.phase_metrics.append(metric)
        return metric

    def complete_phase(
        self,
        metric: PhaseMetric,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        metric.completed_at = datetime.now(UTC)
        metric.status = status
        metric.error = error
        metric.duration_seconds = (metric.completed_at - metric.started_at).total_seconds()
        logger.info(
            "Phase '%s' (attempt %d): status=%s, duration=%.2fs",
            metric.phase.value, metric.attempt, status, metric.duration_seconds,
        )

    def complete_run(self, outcome: str) -> Optional[PipelineRun]:
        with self._lock:
            if self._current_run is None:
                return None
            run = self._current_run
            run.completed_at = datetime.now(UTC)
            run.outcome = outcome
            self._current_run = None

        bottleneck = run.bottleneck_phase
        logger.info(
            "Pipeline run for '%s' complete: outcome=%s, duration=%.2fs, bottleneck=%s",
            run.project_name,
            outcome,
            run.total_duration,
            bottleneck.value if bottleneck else "none",
        )
        return run

    def get_runs(self) -> list[PipelineRun]:
        with self._lock:
            return list(self._runs)

    def get_latest_run(self) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs[-1] if self._runs else None

    def get_summary(self) -> dict:
        """Get an aggregate summary of all recorded runs."""
        runs = self.get_runs()
        if not runs:
            return {"total_runs": 0}

        outcomes: dict[str, int] = {}
        for r in runs:
            outcomes[r.outcome] = outcomes.get(r.outcome, 0) + 1

        return {
            "total_runs": len(runs),
            "total_duration_seconds": round(sum(r.total_duration for r in runs), 2),
            "outcomes": outcomes,
        }
