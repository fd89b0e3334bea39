"""
Tests for supervising the tracing workload.

The workload is a small shell script standing in for the real binary: it
writes to the path given with --output json:<path>, drops a "started"
marker and then sleeps until it is signalled.
"""
import time
import pytest
import requests
from pathlib import Path
from unittest.mock import MagicMock, patch

from kerneltest_mcp.errors import WorkloadMissingError
from kerneltest_mcp.guest_supervisor import (
    DEFAULT_POLICY,
    GuestSupervisor,
    ReadinessState,
    WorkloadConfig,
    format_supervisor_result,
    probe_health,
)

WRITES_EVENT = "echo '{\"eventName\":\"openat\",\"processName\":\"ls\"}' > \"$out\""
WRITES_NOTHING = ": > \"$out\""
IGNORES_SIGTERM = "\ntrap '' TERM"
LOOPS_FOREVER = "while :; do sleep 1; done"


def make_workload(tmp_path: Path, write_output: str, tail: str = "exec sleep 30") -> Path:
    binary = tmp_path / "dist" / "tracee"
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text(
        "#!/bin/sh\n"
        "for arg in \"$@\"; do\n"
        "  case \"$arg\" in json:*) out=\"${arg#json:}\" ;; esac\n"
        "done\n"
        f"{write_output}\n"
        f"touch \"{tmp_path}/started\"\n"
        f"{tail}\n"
    )
    binary.chmod(0o755)
    return binary


class RecordingSupervisor(GuestSupervisor):
    """Keeps the workload handle so tests can check it was reaped."""

    def start(self):
        self.workload_process = super().start()
        return self.workload_process


def ready_when_started(tmp_path):
    return lambda url: 200 if (tmp_path / "started").exists() else None


@pytest.fixture
def artifacts_dir(tmp_path):
    return tmp_path / "qemu-artifacts"


class TestWorkloadConfig:
    """Test the workload invocation."""

    def test_args(self, tmp_path):
        config = WorkloadConfig(binary=Path("dist/tracee"), artifacts_dir=Path("qemu-artifacts"))
        args = config.to_args(Path("policy.yaml"))

        assert args[0] == "dist/tracee"
        assert "json:qemu-artifacts/tracee-output.json" in args
        assert "option:parse-arguments" in args
        assert "file:qemu-artifacts/tracee.log" in args
        assert "--healthz" in args
        assert args[args.index("--policy") + 1] == "policy.yaml"

    def test_default_policy_written(self, tmp_path):
        config = WorkloadConfig(binary=Path("dist/tracee"), artifacts_dir=tmp_path)
        policy = config.ensure_policy()

        assert policy.read_text() == DEFAULT_POLICY
        assert "openat" in DEFAULT_POLICY

    def test_given_policy_kept(self, tmp_path):
        given = tmp_path / "mine.yaml"
        config = WorkloadConfig(binary=Path("dist/tracee"), artifacts_dir=tmp_path, policy_path=given)
        assert config.ensure_policy() == given
        assert not given.exists()


class TestReadiness:
    """Test the bounded readiness wait."""

    def test_ready_on_fifth_attempt(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, WRITES_EVENT)
        probes = []
        sleeps = []

        def probe(url):
            probes.append(url)
            return 200 if len(probes) == 5 else None

        supervisor = RecordingSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            trigger_commands=[],
            probe=probe,
            sleep=sleeps.append,
            clock=lambda: 0.0,
        )
        result = supervisor.run()

        assert result.readiness == ReadinessState.READY
        assert result.attempts == 5
        assert len(probes) == 5
        # Four poll intervals, then the settle and drain delays
        assert sleeps == [1.0, 1.0, 1.0, 1.0, 2.0, 2.0]
        assert probes[0] == "http://localhost:3366/healthz"
        assert supervisor.workload_process.process.poll() is not None

    def test_never_ready_times_out_at_budget(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, WRITES_EVENT)
        probes = []
        sleeps = []

        def probe(url):
            probes.append(url)
            return 503

        supervisor = RecordingSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            probe=probe,
            sleep=sleeps.append,
            clock=lambda: 0.0,
        )
        result = supervisor.run()

        assert result.readiness == ReadinessState.TIMED_OUT
        assert not result.success
        assert result.attempts == 60
        assert len(probes) == 60
        assert sleeps == [1.0] * 59
        assert result.trigger_results == []

    def test_slow_probe_keeps_cadence(self, tmp_path, artifacts_dir):
        """Time spent in a stalled probe comes off the next poll interval."""
        binary = make_workload(tmp_path, WRITES_EVENT)
        now = [0.0]
        sleeps = []
        probe_durations = iter([0.4, 1.0, 1.5])

        def probe(url):
            now[0] += next(probe_durations, 0.0)
            return None

        supervisor = GuestSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            max_attempts=4,
            probe=probe,
            sleep=sleeps.append,
            clock=lambda: now[0],
        )
        result = supervisor.run()

        assert result.readiness == ReadinessState.TIMED_OUT
        assert sleeps == [pytest.approx(0.6), 0.0, 0.0]
        # No workload process survives a failed run
        assert supervisor.workload_process.process.poll() is not None

    def test_timeout_dumps_logs(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, "echo 'failed to load eBPF object' >&2")
        supervisor = GuestSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            max_attempts=10,
            probe=lambda url: None,
            sleep=lambda s: time.sleep(0.05),
        )
        result = supervisor.run()

        assert "failed to load eBPF object" in result.diagnostics
        assert "failed to load eBPF object" in format_supervisor_result(result)

    def test_workload_exits_before_ready(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, WRITES_NOTHING, tail="exit 1")
        supervisor = GuestSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            probe=lambda url: None,
            sleep=lambda s: time.sleep(0.05),
        )
        result = supervisor.run()

        assert result.readiness == ReadinessState.EXITED
        assert not result.success
        assert "before becoming ready" in result.error

    def test_timeout_kills_workload_ignoring_sigterm(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, WRITES_NOTHING + IGNORES_SIGTERM, tail=LOOPS_FOREVER)
        supervisor = RecordingSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            max_attempts=2,
            shutdown_timeout=0.5,
            probe=lambda url: None,
            sleep=lambda s: time.sleep(0.2),
        )
        result = supervisor.run()

        assert result.readiness == ReadinessState.TIMED_OUT
        assert supervisor.workload_process.process.poll() is not None


class TestRun:
    """Test the whole supervised run."""

    def test_output_preview(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, WRITES_EVENT)
        supervisor = GuestSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            probe=ready_when_started(tmp_path),
            sleep=lambda s: time.sleep(0.05),
        )
        result = supervisor.run()

        assert result.success
        assert result.output_bytes > 0
        assert "openat" in result.preview
        assert not result.warnings
        assert result.trigger_results == [("ls -la /tmp", 0), ("cat /etc/os-release", 0)]

    def test_empty_output_is_warning_not_failure(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, WRITES_NOTHING)
        # Stale output from an earlier run must not count
        artifacts_dir.mkdir()
        (artifacts_dir / "tracee-output.json").write_text('{"eventName":"stale"}\n')

        supervisor = GuestSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            trigger_commands=[],
            probe=ready_when_started(tmp_path),
            sleep=lambda s: time.sleep(0.05),
        )
        result = supervisor.run()

        assert result.success
        assert result.output_bytes == 0
        assert len(result.warnings) == 1
        assert "empty" in result.warnings[0]
        assert result.summary().startswith("⚠")

    def test_trigger_failures_recorded(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, WRITES_EVENT)
        supervisor = GuestSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            trigger_commands=[["true"], ["false"], [str(tmp_path / "no-such-command")]],
            probe=ready_when_started(tmp_path),
            sleep=lambda s: time.sleep(0.05),
        )
        result = supervisor.run()

        codes = [code for _, code in result.trigger_results]
        assert codes == [0, 1, -1]
        assert result.success

    def test_missing_binary(self, tmp_path, artifacts_dir):
        supervisor = GuestSupervisor(
            WorkloadConfig(binary=tmp_path / "dist" / "tracee", artifacts_dir=artifacts_dir)
        )
        with patch("kerneltest_mcp.guest_supervisor.subprocess.Popen") as popen:
            with pytest.raises(WorkloadMissingError):
                supervisor.run()

        popen.assert_not_called()

    def test_unresponsive_workload_abandoned_with_warning(self, tmp_path, artifacts_dir):
        binary = make_workload(tmp_path, WRITES_EVENT + IGNORES_SIGTERM, tail=LOOPS_FOREVER)
        supervisor = RecordingSupervisor(
            WorkloadConfig(binary=binary, artifacts_dir=artifacts_dir),
            trigger_commands=[],
            shutdown_timeout=0.5,
            probe=ready_when_started(tmp_path),
            sleep=lambda s: time.sleep(0.05),
        )
        try:
            result = supervisor.run()
            assert any("did not exit" in w for w in result.warnings)
        finally:
            supervisor.workload_process.kill()


class TestProbeHealth:
    """Test the HTTP readiness probe."""

    def test_status_code(self):
        response = MagicMock(status_code=200)
        with patch("kerneltest_mcp.guest_supervisor.requests.get", return_value=response) as get:
            assert probe_health("http://localhost:3366/healthz") == 200
        get.assert_called_once_with("http://localhost:3366/healthz", timeout=1.0)

    def test_unreachable(self):
        with patch("kerneltest_mcp.guest_supervisor.requests.get",
                   side_effect=requests.ConnectionError("refused")):
            assert probe_health("http://localhost:3366/healthz") is None
