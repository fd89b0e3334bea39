"""
Tests for sequential phase execution and aggregation.
"""
import io
import subprocess
import sys
import pytest
from pathlib import Path
from unittest.mock import patch

from kerneltest_mcp.config import RunEnvironment
from kerneltest_mcp.phase_runner import (
    AggregateResult,
    PhaseAggregator,
    PhaseOutcome,
    PhaseStatus,
    TestPhase,
    default_guest_phases,
    default_host_phases,
    docker_available,
    format_aggregate_result,
)


def sh(name, script, **kwargs):
    return TestPhase(name=name, command=["sh", "-c", script], **kwargs)


@pytest.fixture
def stream():
    return io.StringIO()


@pytest.fixture
def aggregator(tmp_path, stream):
    return PhaseAggregator(tmp_path / "artifacts", cwd=tmp_path, stream=stream)


class TestPhaseAggregator:
    """Test running phases."""

    def test_failure_does_not_stop_later_phases(self, aggregator, tmp_path):
        """[pass, fail, pass] runs all three and fails overall."""
        phases = [
            sh("p1", "echo one; touch p1-ran"),
            sh("p2", "echo two; exit 1"),
            sh("p3", "echo three; touch p3-ran"),
        ]

        result = aggregator.run(phases)

        assert [o.status for o in result.outcomes] == [
            PhaseStatus.PASSED, PhaseStatus.FAILED, PhaseStatus.PASSED
        ]
        assert (tmp_path / "p1-ran").exists()
        assert (tmp_path / "p3-ran").exists()
        assert not result.success
        assert result.exit_code == 1
        assert result.outcomes[1].exit_code == 1

    def test_skip_does_not_fail_run(self, aggregator):
        phases = [
            sh("p1", "true"),
            sh("kernel", "exit 1", requires=lambda: "docker not installed"),
        ]

        result = aggregator.run(phases)

        assert result.outcomes[1].status == PhaseStatus.SKIPPED
        assert result.outcomes[1].reason == "docker not installed"
        assert result.outcomes[1].exit_code is None
        assert result.success
        assert result.exit_code == 0

    def test_requirement_met_runs_phase(self, aggregator):
        result = aggregator.run([sh("kernel", "exit 2", requires=lambda: None)])

        assert result.outcomes[0].status == PhaseStatus.FAILED
        assert result.outcomes[0].exit_code == 2

    def test_classified_by_exit_code_not_output(self, aggregator):
        phases = [
            sh("says-failed", "echo 'FAILED: everything'; exit 0"),
            sh("says-passed", "echo 'PASSED'; exit 3"),
        ]

        result = aggregator.run(phases)

        assert [o.status for o in result.outcomes] == [PhaseStatus.PASSED, PhaseStatus.FAILED]

    def test_output_logged_and_streamed(self, aggregator, stream, tmp_path):
        result = aggregator.run([sh("net", "echo to-stdout; echo to-stderr >&2", log_name="e2e-net-test.log")])

        log = tmp_path / "artifacts" / "e2e-net-test.log"
        assert result.outcomes[0].log_path == log
        assert "to-stdout" in log.read_text()
        assert "to-stderr" in log.read_text()
        assert "to-stdout" in stream.getvalue()

    def test_failure_echoes_log_tail(self, tmp_path, stream):
        aggregator = PhaseAggregator(tmp_path / "artifacts", cwd=tmp_path, stream=stream, tail_lines=50)
        aggregator.run([sh("noisy", "for i in $(seq 1 200); do echo line-$i; done; exit 1")])

        output = stream.getvalue()
        tail = output[output.index("--- last 50 lines"):]
        assert "line-200" in tail
        assert "line-151" in tail
        assert "line-150\n" not in tail

    def test_success_does_not_echo_tail(self, aggregator, stream):
        aggregator.run([sh("quiet", "echo ok")])
        assert "--- last" not in stream.getvalue()

    def test_missing_command(self, aggregator):
        result = aggregator.run([TestPhase(name="ghost", command=["/nonexistent/run-tests"])])

        assert result.outcomes[0].status == PhaseStatus.FAILED
        assert result.outcomes[0].exit_code == 127

    def test_timeout(self, aggregator):
        result = aggregator.run([sh("slow", "sleep 30", timeout=1)])

        assert result.outcomes[0].status == PhaseStatus.FAILED
        assert result.outcomes[0].exit_code == 124

    def test_phase_environment(self, aggregator, tmp_path):
        run_env = RunEnvironment(home=tmp_path / "home")
        phase = sh("env", "echo HOME=$HOME GOPROXY=$GOPROXY", env=run_env.to_env())

        result = aggregator.run([phase])

        log = result.outcomes[0].log_path.read_text()
        assert f"HOME={tmp_path / 'home'}" in log
        assert "GOPROXY=off" in log


class TestAggregateResult:
    def test_empty_run_succeeds(self):
        assert AggregateResult().success

    def test_summary_counts(self):
        result = AggregateResult(outcomes=[
            PhaseOutcome("a", PhaseStatus.PASSED, 0),
            PhaseOutcome("b", PhaseStatus.FAILED, 1, log_path=Path("b.log")),
            PhaseOutcome("c", PhaseStatus.SKIPPED, reason="docker not installed"),
        ])

        assert "1 passed, 1 failed, 1 skipped" in result.summary()
        text = format_aggregate_result(result)
        assert "SKIPPED (docker not installed)" in text
        assert "see b.log" in text


class TestDockerAvailable:
    """Test the container runtime requirement check."""

    def test_not_installed(self):
        with patch("kerneltest_mcp.phase_runner.shutil.which", return_value=None):
            assert docker_available() == "docker not installed"

    def test_daemon_down(self):
        with patch("kerneltest_mcp.phase_runner.shutil.which", return_value="/usr/bin/docker"), \
             patch("kerneltest_mcp.phase_runner.subprocess.run",
                   return_value=subprocess.CompletedProcess(["docker", "ps"], 1)):
            assert "not available" in docker_available()

    def test_available(self):
        with patch("kerneltest_mcp.phase_runner.shutil.which", return_value="/usr/bin/docker"), \
             patch("kerneltest_mcp.phase_runner.subprocess.run",
                   return_value=subprocess.CompletedProcess(["docker", "ps"], 0)):
            assert docker_available() is None


class TestDefaultPhases:
    def test_host_phases(self):
        phases = default_host_phases()

        assert [p.name for p in phases] == ["compatibility", "instrumentation", "network"]
        assert phases[0].command == ["make", "test-compatibility"]
        assert phases[0].env["GOPATH"] == "/tmp/go"
        assert phases[1].command == ["./tests/e2e-inst-test.sh", "--keep-artifacts"]
        assert phases[1].log_file == "e2e-inst-test.log"

    def test_guest_phases(self):
        phases = default_guest_phases(artifacts_dir=Path("qemu-artifacts"), workload_binary=Path("dist/tracee"))

        assert [p.name for p in phases] == [
            "workload-smoke", "compatibility", "instrumentation", "network", "kernel"
        ]
        assert phases[0].command[:4] == [sys.executable, "-m", "kerneltest_mcp", "supervise"]
        assert phases[-1].requires is docker_available
        assert all(p.requires is None for p in phases[:-1])
