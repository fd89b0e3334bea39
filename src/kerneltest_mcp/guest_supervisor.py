"""
Supervise the tracing workload inside the guest.

The supervisor owns the workload process for its whole life: it starts it
in the background, polls its health endpoint with a bounded attempt
budget, drives some activity for it to observe, shuts it down and checks
that it produced output.
"""
import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import requests

from .errors import ReadinessTimeoutError, WorkloadMissingError

logger = logging.getLogger(__name__)

HEALTH_URL = "http://localhost:3366/healthz"

DEFAULT_POLICY = """\
apiVersion: tracee.aquasec.com/v1beta1
kind: Policy
metadata:
  name: kerneltest-smoke
  annotations:
    description: file opens and program executions
spec:
  scope:
    - global
  rules:
    - event: openat
    - event: execve
"""

DEFAULT_TRIGGER_COMMANDS = [
    ["ls", "-la", "/tmp"],
    ["cat", "/etc/os-release"],
]


class ReadinessState(Enum):
    """Where the workload got to before the supervisor stopped waiting."""

    NOT_STARTED = "not_started"
    POLLING = "polling"
    READY = "ready"
    TIMED_OUT = "timed_out"
    EXITED = "exited"  # Workload died before becoming ready


@dataclass
class WorkloadConfig:
    """How to invoke the tracing workload and where its files go."""

    binary: Path
    artifacts_dir: Path
    policy_path: Optional[Path] = None
    health_url: str = HEALTH_URL
    output_name: str = "tracee-output.json"
    log_name: str = "tracee.log"
    stdout_name: str = "tracee-stdout.log"
    extra_args: List[str] = field(default_factory=list)

    @property
    def output_path(self) -> Path:
        return self.artifacts_dir / self.output_name

    @property
    def log_path(self) -> Path:
        return self.artifacts_dir / self.log_name

    @property
    def stdout_path(self) -> Path:
        return self.artifacts_dir / self.stdout_name

    def ensure_policy(self) -> Path:
        """Return the policy file, writing the default policy if none was given."""
        if self.policy_path:
            return self.policy_path
        policy = self.artifacts_dir / "kerneltest-policy.yaml"
        policy.write_text(DEFAULT_POLICY)
        return policy

    def to_args(self, policy: Path) -> List[str]:
        """Build the workload command line."""
        return [
            str(self.binary),
            "--output", f"json:{self.output_path}",
            "--output", "option:parse-arguments",
            "--log", f"file:{self.log_path}",
            "--healthz",
            "--policy", str(policy),
        ] + list(self.extra_args)


@dataclass
class WorkloadProcess:
    """Owned handle to the running workload."""

    process: subprocess.Popen
    stdout_path: Path

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_running(self) -> bool:
        return self.process.poll() is None

    def terminate(self, timeout: float) -> bool:
        """Send SIGTERM and wait up to timeout seconds.

        Returns:
            True if the process has exited
        """
        if not self.is_running():
            return True
        try:
            self.process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return True
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    def kill(self, timeout: float = 5) -> None:
        if not self.is_running():
            return
        try:
            self.process.kill()
            self.process.wait(timeout=timeout)
        except (ProcessLookupError, subprocess.TimeoutExpired) as e:
            logger.warning(f"⚠ Could not reap workload {self.pid}: {e}")


@dataclass
class SupervisorResult:
    """Outcome of one supervised workload run."""

    readiness: ReadinessState
    attempts: int = 0
    output_bytes: int = 0
    preview: str = ""
    trigger_results: List[Tuple[str, int]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    diagnostics: str = ""

    @property
    def success(self) -> bool:
        return self.readiness == ReadinessState.READY and self.error is None

    def summary(self) -> str:
        if self.readiness == ReadinessState.TIMED_OUT:
            return f"✗ Workload not ready after {self.attempts} attempts"
        if self.readiness == ReadinessState.EXITED:
            return f"✗ Workload exited before becoming ready ({self.attempts} attempts)"
        if self.error:
            return f"✗ {self.error}"
        if self.output_bytes == 0:
            return f"⚠ Workload ready after {self.attempts} attempt(s) but produced no output"
        return f"✓ Workload ready after {self.attempts} attempt(s), {self.output_bytes} bytes of output"


def probe_health(url: str, timeout: float = 1.0) -> Optional[int]:
    """GET the health endpoint.

    Returns:
        HTTP status code, or None if the endpoint could not be reached
    """
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException:
        return None
    return response.status_code


def _tail(path: Path, lines: int) -> str:
    try:
        content = path.read_text(errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


class GuestSupervisor:
    """Runs the workload under supervision and validates its output."""

    MAX_ATTEMPTS = 60
    POLL_INTERVAL = 1.0
    SETTLE_DELAY = 2.0
    DRAIN_DELAY = 2.0
    SHUTDOWN_TIMEOUT = 10.0
    PREVIEW_BYTES = 500
    LOG_TAIL_LINES = 50

    def __init__(
        self,
        workload: WorkloadConfig,
        trigger_commands: Optional[List[List[str]]] = None,
        max_attempts: int = MAX_ATTEMPTS,
        poll_interval: float = POLL_INTERVAL,
        settle_delay: float = SETTLE_DELAY,
        drain_delay: float = DRAIN_DELAY,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
        probe: Callable[[str], Optional[int]] = probe_health,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize guest supervisor.

        Args:
            workload: Workload invocation and artifact locations
            trigger_commands: Commands run to generate activity once ready
            max_attempts: Readiness poll budget
            poll_interval: Seconds between readiness polls
            settle_delay: Seconds to wait after readiness before triggering
            drain_delay: Seconds to wait after triggering before shutdown
            shutdown_timeout: Seconds to wait for the workload to exit after SIGTERM
            probe: Returns the health endpoint status code, or None when unreachable
            sleep: Sleep function
            clock: Monotonic clock used to keep the poll cadence fixed
        """
        self.workload = workload
        self.trigger_commands = (
            trigger_commands if trigger_commands is not None else DEFAULT_TRIGGER_COMMANDS
        )
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.drain_delay = drain_delay
        self.shutdown_timeout = shutdown_timeout
        self.probe = probe
        self.sleep = sleep
        self.clock = clock

    def check_binary(self) -> None:
        """Raise WorkloadMissingError unless the workload binary is executable."""
        binary = self.workload.binary
        if not binary.is_file() or not os.access(binary, os.X_OK):
            raise WorkloadMissingError(
                f"Workload binary not found at {binary}. Build it on the host before booting the guest."
            )

    def start(self) -> WorkloadProcess:
        """Start the workload in the background."""
        self.workload.artifacts_dir.mkdir(parents=True, exist_ok=True)
        # A stale artifact from an earlier run must not count as output
        self.workload.output_path.unlink(missing_ok=True)

        policy = self.workload.ensure_policy()
        cmd = self.workload.to_args(policy)
        logger.info(f"Starting workload: {' '.join(cmd)}")

        with open(self.workload.stdout_path, "w") as stdout:
            process = subprocess.Popen(cmd, stdout=stdout, stderr=subprocess.STDOUT)
        logger.info(f"  Workload pid {process.pid}")
        return WorkloadProcess(process=process, stdout_path=self.workload.stdout_path)

    def wait_until_ready(self, workload: WorkloadProcess) -> int:
        """Poll the health endpoint at a fixed cadence.

        Returns:
            The attempt number on which the endpoint answered 2xx

        Raises:
            ReadinessTimeoutError: Budget exhausted, or the workload exited first
        """
        for attempt in range(1, self.max_attempts + 1):
            if not workload.is_running():
                raise ReadinessTimeoutError(
                    attempt,
                    f"Workload exited with code {workload.process.returncode} before becoming ready",
                )
            probe_started = self.clock()
            status = self.probe(self.workload.health_url)
            if status is not None and 200 <= status < 300:
                logger.info(f"✓ Workload ready (attempt {attempt}/{self.max_attempts})")
                return attempt
            logger.debug(f"  Readiness attempt {attempt}/{self.max_attempts}: {status}")
            if attempt < self.max_attempts:
                spent = self.clock() - probe_started
                self.sleep(max(0.0, self.poll_interval - spent))

        raise ReadinessTimeoutError(self.max_attempts)

    def trigger_activity(self) -> List[Tuple[str, int]]:
        """Run the trigger commands. Failures are recorded, never raised."""
        results = []
        for cmd in self.trigger_commands:
            name = " ".join(cmd)
            try:
                completed = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
                results.append((name, completed.returncode))
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning(f"⚠ Trigger '{name}' failed: {e}")
                results.append((name, -1))
        return results

    def dump_logs(self) -> str:
        """Collect the tails of the workload's log and console output."""
        sections = []
        for label, path in (("log", self.workload.log_path), ("stdout", self.workload.stdout_path)):
            tail = _tail(path, self.LOG_TAIL_LINES)
            if tail:
                sections.append(f"--- workload {label} ({path}) ---\n{tail}")
        return "\n".join(sections)

    def validate_output(self, result: SupervisorResult) -> None:
        """Record output size and preview; an empty artifact is only a warning."""
        path = self.workload.output_path
        try:
            size = path.stat().st_size
        except OSError:
            size = 0

        result.output_bytes = size
        if size == 0:
            msg = f"Workload output {path} is empty; no matching events were captured"
            logger.warning(f"⚠ {msg}")
            result.warnings.append(msg)
            return

        with open(path, "r", errors="replace") as f:
            result.preview = f.read(self.PREVIEW_BYTES)
        logger.info(f"✓ Workload output: {size} bytes")
        logger.info(f"Preview:\n{result.preview}")

    def run(self) -> SupervisorResult:
        """Supervise one workload run from start to output validation.

        Returns:
            SupervisorResult; a readiness timeout is reported as a failed result

        Raises:
            WorkloadMissingError: The workload binary is not present
        """
        logger.info("=" * 60)
        logger.info(f"Supervising workload {self.workload.binary}")
        self.check_binary()

        result = SupervisorResult(readiness=ReadinessState.NOT_STARTED)
        workload = self.start()
        timed_out = False
        try:
            result.readiness = ReadinessState.POLLING
            try:
                result.attempts = self.wait_until_ready(workload)
            except ReadinessTimeoutError as e:
                timed_out = True
                result.attempts = e.attempts
                result.readiness = (
                    ReadinessState.TIMED_OUT if workload.is_running() else ReadinessState.EXITED
                )
                result.error = str(e)
                result.diagnostics = self.dump_logs()
                logger.error(f"✗ {e}")
                if result.diagnostics:
                    logger.error(result.diagnostics)
                return result

            result.readiness = ReadinessState.READY
            self.sleep(self.settle_delay)
            result.trigger_results = self.trigger_activity()
            self.sleep(self.drain_delay)
        finally:
            self._shutdown(workload, result, force=timed_out)
            logger.info("=" * 60)

        self.validate_output(result)
        logger.info(result.summary())
        return result

    def _shutdown(self, workload: WorkloadProcess, result: SupervisorResult, force: bool) -> None:
        if workload.terminate(self.shutdown_timeout):
            logger.info(f"Workload exited with code {workload.process.returncode}")
            return

        if force:
            logger.warning(f"⚠ Workload {workload.pid} ignored SIGTERM, killing")
            workload.kill()
            return

        msg = f"Workload {workload.pid} did not exit within {self.shutdown_timeout}s of SIGTERM"
        logger.warning(f"⚠ {msg}")
        result.warnings.append(msg)


def format_supervisor_result(result: SupervisorResult) -> str:
    lines = [result.summary()]
    for name, code in result.trigger_results:
        lines.append(f"  trigger '{name}': exit {code}")
    for warning in result.warnings:
        lines.append(f"  ⚠ {warning}")
    if result.preview:
        lines.append("")
        lines.append("Output preview:")
        lines.append(result.preview)
    if result.diagnostics:
        lines.append("")
        lines.append(result.diagnostics)
    return "\n".join(lines)
