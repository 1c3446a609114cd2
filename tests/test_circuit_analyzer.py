"""
Tests for the circuit analyzer (src/circuit_analyzer.py)

Tests cover:
- Reference profiles and measured circuits
- Optimization recommendations and reports
- The circuit self-test suite and edge cases
- Benchmarks
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from circuit_analyzer import (
    REFERENCE_CIRCUITS,
    CircuitAnalyzer,
    estimate_compilation_ms,
    estimate_memory_mb,
)
from exceptions import ValidationError


@pytest.fixture(scope="module")
def analyzer(engine):
    return CircuitAnalyzer(engine)


class TestAnalyzePerformance:
    """Tests for analyze_circuit_performance."""

    def test_circuit_names(self, analyzer):
        names = analyzer.circuit_names()
        assert names[:2] == ["withdrawal", "transfer"]
        assert set(REFERENCE_CIRCUITS) <= set(names)

    def test_reference_profile(self, analyzer):
        metrics = analyzer.analyze_circuit_performance("privacy_mixer")

        assert metrics.constraints == 200_000
        assert metrics.variables == 300_000
        assert metrics.proving_time == 8000.0
        assert metrics.compilation_time == estimate_compilation_ms(200_000)
        assert metrics.memory_usage == estimate_memory_mb(200_000)
        assert metrics.measured is False

    def test_measured_circuit(self, analyzer, engine):
        metrics = analyzer.analyze_circuit_performance("withdrawal")

        assert metrics.measured is True
        assert metrics.constraints == engine.get_circuit_stats("withdrawal")["constraints"]
        assert metrics.proving_time > 0
        assert metrics.verification_time > 0

    def test_metrics_to_dict(self, analyzer):
        data = analyzer.analyze_circuit_performance("ens_privacy").to_dict()
        assert data["name"] == "ens_privacy"
        assert "provingTime" in data
        assert "memoryUsage" in data

    def test_unknown_circuit(self, analyzer):
        with pytest.raises(ValidationError):
            analyzer.analyze_circuit_performance("nonexistent")


class TestOptimizations:
    """Tests for recommendations."""

    def test_large_circuit_recommendations(self, analyzer):
        types = {r.type for r in analyzer.generate_optimizations("privacy_mixer")}
        assert types == {"constraint", "memory", "size"}

    def test_small_reference_circuit(self, analyzer):
        assert analyzer.generate_optimizations("ens_privacy") == []

    def test_memory_only(self, analyzer):
        recommendations = analyzer.generate_optimizations("compliance")
        assert [r.type for r in recommendations] == ["memory"]
        assert recommendations[0].severity == "medium"

    def test_report(self, analyzer):
        report = analyzer.generate_optimization_report("privacy_mixer")

        assert "Circuit privacy_mixer optimization analysis" in report["summary"]
        assert "Constraints: 200,000" in report["summary"]
        assert len(report["recommendations"]) == 3
        assert report["current_metrics"]["constraints"] == 200_000
        assert set(report["estimated_improvements"]) == {
            "constraint_reduction", "speed_improvement", "memory_reduction", "size_reduction"
        }


class TestCircuitSelfTests:
    """Tests for run_circuit_tests and test_edge_cases."""

    @pytest.mark.parametrize("name", ["withdrawal", "transfer"])
    def test_suite_passes(self, analyzer, name):
        report = analyzer.run_circuit_tests(name)

        assert report.total == 5
        assert report.failed == 0, report.to_dict()
        assert all(r.duration_ms >= 0 for r in report.results)

    def test_report_serialization(self, analyzer):
        data = analyzer.run_circuit_tests("withdrawal").to_dict()
        assert data["passed"] == 5
        assert data["results"][0]["testName"] == "Valid input test"
        assert "error" not in data["results"][0]

    def test_edge_cases(self, analyzer):
        result = analyzer.test_edge_cases("withdrawal")

        assert result["edge_cases_tested"] == 4
        assert result["passed"] == 4
        assert result["failed"] == 0
        assert result["critical_issues"] == []

    def test_reference_circuit_cannot_be_tested(self, analyzer):
        with pytest.raises(ValidationError):
            analyzer.run_circuit_tests("privacy_mixer")

    def test_failures_are_reported(self, analyzer):
        def broken(name):
            raise ValidationError("witness builder broke")

        report = analyzer._run_checks("withdrawal", [("Broken check", True, broken)])
        assert report.failed == 1
        assert report.results[0].error is not None
        assert "witness builder broke" in report.results[0].error

    def test_unexpected_errors_fail_only_their_check(self, analyzer):
        def missing_key(name):
            raise KeyError("pathElements")

        def io_failure(name):
            raise OSError("zkey unreadable")

        def fine(name):
            return None

        report = analyzer._run_checks("withdrawal", [
            ("Missing key", True, missing_key),
            ("IO failure", False, io_failure),
            ("Passing check", False, fine),
        ])

        assert report.total == 3
        assert report.failed == 2
        assert report.passed == 1
        assert report.passed + report.failed == report.total
        assert report.results[0].error.startswith("KeyError")
        assert "zkey unreadable" in report.results[1].error
        assert report.results[2].passed


class TestBenchmark:
    """Tests for benchmark_circuit."""

    def test_benchmark(self, analyzer):
        result = analyzer.benchmark_circuit("withdrawal", test_cases=2)

        assert result["test_cases"] == 2
        assert len(result["results"]) == 2
        assert result["success_rate"] == 1.0
        assert result["average_proving_time"] > 0
        assert all(1 <= r["tree_size"] <= 33 for r in result["results"])

    def test_invalid_case_count(self, analyzer):
        with pytest.raises(ValidationError):
            analyzer.benchmark_circuit("withdrawal", test_cases=0)

    def test_reference_circuit_cannot_be_benchmarked(self, analyzer):
        with pytest.raises(ValidationError):
            analyzer.benchmark_circuit("compliance", test_cases=1)
