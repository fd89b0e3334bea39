"""
Run test phases in sequence and aggregate their outcomes.
"""
import logging
import os
import shutil
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO

from .config import RunEnvironment

logger = logging.getLogger(__name__)

FAILURE_TAIL_LINES = 50


class PhaseStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TestPhase:
    """One independently scored test-suite invocation.

    requires, when set, returns None if the phase may run or a reason
    string if it must be skipped.
    """

    __test__ = False  # Not a pytest test class

    name: str
    command: List[str]
    log_name: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    requires: Optional[Callable[[], Optional[str]]] = None
    timeout: Optional[int] = None

    @property
    def log_file(self) -> str:
        return self.log_name or f"{self.name}.log"


@dataclass
class PhaseOutcome:
    name: str
    status: PhaseStatus
    exit_code: Optional[int] = None
    duration: float = 0.0
    log_path: Optional[Path] = None
    reason: str = ""


@dataclass
class AggregateResult:
    outcomes: List[PhaseOutcome] = field(default_factory=list)

    @property
    def failed(self) -> List[PhaseOutcome]:
        return [o for o in self.outcomes if o.status == PhaseStatus.FAILED]

    @property
    def skipped(self) -> List[PhaseOutcome]:
        return [o for o in self.outcomes if o.status == PhaseStatus.SKIPPED]

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def summary(self) -> str:
        passed = sum(1 for o in self.outcomes if o.status == PhaseStatus.PASSED)
        text = f"{passed} passed, {len(self.failed)} failed, {len(self.skipped)} skipped"
        if self.success:
            return f"✓ Result: SUCCESS ({text})"
        return f"✗ Result: FAILURE ({text})"


def docker_available() -> Optional[str]:
    """Requirement check for container-based phases.

    Returns:
        None if a docker daemon answers, otherwise the reason it is unusable
    """
    if shutil.which("docker") is None:
        return "docker not installed"
    try:
        result = subprocess.run(["docker", "ps"], capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"docker daemon not reachable: {e}"
    if result.returncode != 0:
        return "docker daemon not available in this environment"
    return None


class PhaseAggregator:
    """Runs phases one after another; a failure never stops later phases."""

    def __init__(
        self,
        artifacts_dir: Path,
        cwd: Optional[Path] = None,
        stream: Optional[TextIO] = None,
        tail_lines: int = FAILURE_TAIL_LINES,
    ):
        """Initialize phase aggregator.

        Args:
            artifacts_dir: Directory receiving one log file per phase
            cwd: Working directory for phase commands (default: cwd)
            stream: Where phase output is echoed (default: sys.stdout)
            tail_lines: Log lines echoed inline when a phase fails
        """
        self.artifacts_dir = Path(artifacts_dir)
        self.cwd = Path(cwd) if cwd else None
        self.stream = stream
        self.tail_lines = tail_lines

    @property
    def _out(self) -> TextIO:
        return self.stream if self.stream is not None else sys.stdout

    def run(self, phases: List[TestPhase]) -> AggregateResult:
        """Run every phase and aggregate the outcomes."""
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        result = AggregateResult()

        for phase in phases:
            result.outcomes.append(self.run_phase(phase))

        logger.info("=" * 60)
        for outcome in result.outcomes:
            line = f"  {outcome.name}: {outcome.status.value.upper()}"
            if outcome.reason:
                line += f" ({outcome.reason})"
            logger.info(line)
        if result.success:
            logger.info(result.summary())
        else:
            logger.error(result.summary())
        return result

    def run_phase(self, phase: TestPhase) -> PhaseOutcome:
        if phase.requires:
            reason = phase.requires()
            if reason:
                logger.info(f">>> SKIPPING {phase.name}: {reason}")
                return PhaseOutcome(name=phase.name, status=PhaseStatus.SKIPPED, reason=reason)

        log_path = self.artifacts_dir / phase.log_file
        logger.info(f">>> Running {phase.name}: {' '.join(phase.command)}")
        start_time = time.time()
        exit_code = self._execute(phase, log_path)
        duration = time.time() - start_time

        if exit_code == 0:
            logger.info(f"✓ {phase.name}: PASSED ({duration:.1f}s)")
            status = PhaseStatus.PASSED
        else:
            logger.error(f"✗ {phase.name}: FAILED with exit code {exit_code} ({duration:.1f}s)")
            status = PhaseStatus.FAILED
            self._echo_tail(phase, log_path)

        return PhaseOutcome(
            name=phase.name,
            status=status,
            exit_code=exit_code,
            duration=duration,
            log_path=log_path,
        )

    def _execute(self, phase: TestPhase, log_path: Path) -> int:
        """Run the phase command, teeing combined output to its log and the stream."""
        out = self._out
        with open(log_path, "w", encoding="utf-8") as log:
            try:
                process = subprocess.Popen(
                    phase.command,
                    cwd=self.cwd,
                    env=phase.env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    start_new_session=True,
                )
            except OSError as e:
                log.write(f"Failed to start {phase.command[0]}: {e}\n")
                out.write(f"ERROR: failed to start {phase.name}: {e}\n")
                return 127

            expired = threading.Event()
            timer = None
            if phase.timeout:
                # Kill the whole group so children holding the pipe open go too
                def expire():
                    expired.set()
                    try:
                        os.killpg(process.pid, signal.SIGKILL)
                    except ProcessLookupError:
                        pass

                timer = threading.Timer(phase.timeout, expire)
                timer.start()

            try:
                for line in process.stdout:
                    log.write(line)
                    out.write(line)
                process.stdout.close()
                exit_code = process.wait()
            finally:
                if timer:
                    timer.cancel()

            if expired.is_set():
                log.write(f"\nPhase {phase.name} timed out after {phase.timeout}s\n")
                return 124
            return exit_code

    def _echo_tail(self, phase: TestPhase, log_path: Path) -> None:
        try:
            lines = log_path.read_text(errors="replace").splitlines()
        except OSError as e:
            logger.warning(f"⚠ Could not read {log_path}: {e}")
            return

        tail = lines[-self.tail_lines:]
        out = self._out
        out.write(f"--- last {len(tail)} lines of {log_path} ---\n")
        for line in tail:
            out.write(line + "\n")
        out.write(f"--- end of {phase.name} log ---\n")
        out.flush()


def default_host_phases(run_env: Optional[RunEnvironment] = None) -> List[TestPhase]:
    """Build-verification and e2e phases that need no guest."""
    run_env = run_env or RunEnvironment()
    return [
        TestPhase(
            name="compatibility",
            command=["make", "test-compatibility"],
            log_name="compatibility-test.log",
            env=run_env.to_env(),
        ),
        TestPhase(
            name="instrumentation",
            command=["./tests/e2e-inst-test.sh", "--keep-artifacts"],
            log_name="e2e-inst-test.log",
        ),
        TestPhase(
            name="network",
            command=["./tests/e2e-net-test.sh"],
            log_name="e2e-net-test.log",
        ),
    ]


def default_guest_phases(
    run_env: Optional[RunEnvironment] = None,
    artifacts_dir: Optional[Path] = None,
    workload_binary: Optional[Path] = None,
) -> List[TestPhase]:
    """Phases run inside the guest: workload smoke test, host phases, then kernel tests."""
    phases = []
    if artifacts_dir is not None and workload_binary is not None:
        phases.append(
            TestPhase(
                name="workload-smoke",
                command=[
                    sys.executable, "-m", "kerneltest_mcp", "supervise",
                    "--binary", str(workload_binary),
                    "--artifacts-dir", str(artifacts_dir),
                ],
                log_name="workload-smoke.log",
            )
        )
    phases.extend(default_host_phases(run_env))
    phases.append(
        TestPhase(
            name="kernel",
            command=["./tests/e2e-kernel-test.sh"],
            log_name="e2e-kernel-test.log",
            requires=docker_available,
        )
    )
    return phases


def format_aggregate_result(result: AggregateResult) -> str:
    lines = [result.summary(), ""]
    for outcome in result.outcomes:
        if outcome.status == PhaseStatus.SKIPPED:
            lines.append(f"  - {outcome.name}: SKIPPED ({outcome.reason})")
        elif outcome.status == PhaseStatus.PASSED:
            lines.append(f"  ✓ {outcome.name}: PASSED in {outcome.duration:.1f}s")
        else:
            lines.append(
                f"  ✗ {outcome.name}: FAILED (exit {outcome.exit_code}) - see {outcome.log_path}"
            )
    return "\n".join(lines)
