"""Tests for appforge/orchestrator/metrics.py: per-phase pipeline metrics."""

from datetime import UTC, datetime

import pytest

from appforge.core.models import PipelinePhase
from appforge.orchestrator.metrics import PhaseMetric, PipelineMetrics, PipelineRun


def _metric(phase: PipelinePhase, duration: float = 0.0, status: str = "pending") -> PhaseMetric:
    return PhaseMetric(
        phase=phase, attempt=1, started_at=datetime.now(UTC),
        duration_seconds=duration, status=status,
    )


class TestPhaseMetric:
    def test_succeeded_true(self):
        assert _metric(PipelinePhase.BUILD, status="success").succeeded is True

    def test_succeeded_false(self):
        assert _metric(PipelinePhase.BUILD, status="failure").succeeded is False


class TestPipelineRun:
    def test_total_duration(self):
        run = PipelineRun(project_name="Todo")
        run.phase_metrics = [
            _metric(PipelinePhase.PLANNING, 1.5),
            _metric(PipelinePhase.BUILD, 2.5),
        ]
        assert run.total_duration == 4.0

    def test_bottleneck_phase(self):
        run = PipelineRun(project_name="Todo")
        run.phase_metrics = [
            _metric(PipelinePhase.PLANNING, 0.5),
            _metric(PipelinePhase.BUILD, 5.0),
            _metric(PipelinePhase.CODE_GENERATION, 2.0),
        ]
        assert run.bottleneck_phase == PipelinePhase.BUILD

    def test_bottleneck_none_when_empty(self):
        assert PipelineRun(project_name="Todo").bottleneck_phase is None


class TestPipelineMetrics:
    @pytest.fixture
    def metrics(self) -> PipelineMetrics:
        return PipelineMetrics()

    def test_start_run(self, metrics):
        run = metrics.start_run("Todo")
        assert run.project_name == "Todo"
        assert run.outcome == "in_progress"

    def test_start_and_complete_phase(self, metrics):
        metrics.start_run("Todo")
        metric = metrics.start_phase(PipelinePhase.BUILD, attempt=2)
        assert metric.status == "pending"
        assert metric.attempt == 2

        metrics.complete_phase(metric, status="failure", error="compile error")
        assert metric.status == "failure"
        assert metric.error == "compile error"
        assert metric.completed_at is not None
        assert metric.duration_seconds >= 0

    def test_phase_attached_to_current_run(self, metrics):
        run = metrics.start_run("Todo")
        metrics.start_phase(PipelinePhase.PLANNING)
        metrics.start_phase(PipelinePhase.CODE_GENERATION)
        assert [m.phase for m in run.phase_metrics] == [
            PipelinePhase.PLANNING, PipelinePhase.CODE_GENERATION,
        ]

    def test_complete_run(self, metrics):
        metrics.start_run("Todo")
        run = metrics.complete_run("succeeded")
        assert run.outcome == "succeeded"
        assert run.completed_at is not None
        assert metrics.complete_run("succeeded") is None

    def test_summary(self, metrics):
        assert metrics.get_summary() == {"total_runs": 0}
        metrics.start_run("A")
        metrics.complete_run("succeeded")
        metrics.start_run("B")
        metrics.complete_run("failed")
        summary = metrics.get_summary()
        assert summary["total_runs"] == 2
        assert summary["outcomes"] == {"succeeded": 1, "failed": 1}
        assert metrics.get_latest_run().project_name == "B"
        assert len(metrics.get_runs()) == 2
