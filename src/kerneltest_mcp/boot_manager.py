"""
Boot target kernels in virtme-ng guests and run a command inside them.
"""

import datetime
import logging
import os
import pty
import select
import signal
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from . import config
from .config import ArchInfo, VmResources, host_arch
from .environment_manager import HOST_TEMP_DIRS, GuestEnvironment
from .errors import ProvisioningError, ToolMissingError
from .kernel_resolver import ResolvedKernel

logger = logging.getLogger(__name__)

KVM_DEVICE = Path("/dev/kvm")
PTY_DRAIN_TIMEOUT = 2.0


class VmSessionState(Enum):
    """Lifecycle of one guest boot."""

    PROVISIONING = "provisioning"
    BOOTING = "booting"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {VmSessionState.COMPLETED, VmSessionState.TIMED_OUT, VmSessionState.FAILED}
)

_ALLOWED_TRANSITIONS = {
    VmSessionState.PROVISIONING: {VmSessionState.BOOTING, VmSessionState.FAILED},
    VmSessionState.BOOTING: {VmSessionState.RUNNING} | TERMINAL_STATES,
    VmSessionState.RUNNING: TERMINAL_STATES,
}


@dataclass
class VmSession:
    """One guest boot, from provisioning to a terminal state. Never reused."""

    kernel: ResolvedKernel
    environment: GuestEnvironment
    guest_command: List[str]
    resources: VmResources
    state: VmSessionState = VmSessionState.PROVISIONING
    history: List[VmSessionState] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: VmSessionState) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(f"Invalid VM session transition {self.state.value} -> {new_state.value}")
        self.history.append(self.state)
        self.state = new_state


@dataclass
class LaunchResult:
    """Result of running a command in a guest."""

    exit_code: int
    output: str
    state: VmSessionState
    duration: float  # seconds
    command: List[str] = field(default_factory=list)
    log_file_path: Optional[Path] = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        # A dry run never carries a verdict
        if self.dry_run:
            return False
        return self.state == VmSessionState.COMPLETED and self.exit_code == 0

    def summary(self) -> str:
        if self.dry_run:
            return "Dry run: launch command printed, no guest booted"
        if self.state == VmSessionState.TIMED_OUT:
            return f"✗ Guest timed out after {self.duration:.1f}s"
        if self.state == VmSessionState.FAILED:
            return f"✗ Guest failed (exit code {self.exit_code}) after {self.duration:.1f}s"
        if self.exit_code != 0:
            return f"✗ Guest command exited {self.exit_code} after {self.duration:.1f}s"
        return f"✓ Guest command succeeded in {self.duration:.1f}s"


def _ensure_log_directory() -> Path:
    config.BOOT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    return config.BOOT_LOG_DIR


def _cleanup_old_logs(max_age_days: int = 7):
    """Delete boot logs older than specified days."""
    log_dir = config.BOOT_LOG_DIR
    if not log_dir.exists():
        return

    max_age_seconds = max_age_days * 24 * 60 * 60
    now = time.time()
    for log_file in log_dir.glob("boot-*.log"):
        try:
            if log_file.is_file() and now - log_file.stat().st_mtime > max_age_seconds:
                log_file.unlink()
        except OSError as e:
            logger.debug(f"Could not remove old boot log {log_file}: {e}")


def _run_with_pty(
    cmd: List[str],
    cwd: Path,
    timeout: int,
    description: str = "",
    on_start: Optional[Callable[[], None]] = None,
) -> Tuple[int, str, bool, Path]:
    """Run a command with a pseudo-terminal.

    virtme-ng requires a valid PTS. The command runs in its own process
    group so QEMU is killed along with vng on timeout.

    Args:
        cmd: Command and arguments to run
        cwd: Working directory
        timeout: Timeout in seconds
        description: Description written to the log header
        on_start: Called once the process has been spawned

    Returns:
        Tuple of (exit_code, output, timed_out, log_file_path)
    """
    _ensure_log_directory()
    timestamp = datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file_path = config.BOOT_LOG_DIR / f"boot-{timestamp}-running.log"
    log_file_handle = None

    try:
        log_file_handle = open(log_file_path, "w", encoding="utf-8", buffering=1)
        log_file_handle.write("=== VM Boot Log ===\n")
        log_file_handle.write(f"Description: {description}\n")
        log_file_handle.write(f"Started: {datetime.datetime.now().isoformat()}\n")
        log_file_handle.write(f"Command: {' '.join(cmd)}\n")
        log_file_handle.write("=" * 80 + "\n\n")
    except OSError as e:
        logger.warning(f"Failed to create log file {log_file_path}: {e}")
        if log_file_handle:
            log_file_handle.close()
            log_file_handle = None

    master_fd, slave_fd = pty.openpty()
    process = None
    output = []
    timed_out = False

    try:
        process = subprocess.Popen(
            cmd,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            close_fds=True,
            start_new_session=True,
        )
        os.close(slave_fd)
        slave_fd = None
        if on_start:
            on_start()

        start_time = time.time()
        last_progress_log = start_time

        def record(data: bytes):
            output.append(data)
            if log_file_handle:
                try:
                    log_file_handle.write(data.decode("utf-8", errors="replace"))
                except OSError:
                    pass

        while process.poll() is None:
            elapsed = time.time() - start_time
            if elapsed > timeout:
                logger.error(f"✗ Guest exceeded {timeout}s timeout, killing process group")
                try:
                    os.killpg(os.getpgid(process.pid), signal.SIGKILL)
                except ProcessLookupError:
                    pass
                process.wait()
                timed_out = True
                break

            if time.time() - last_progress_log > 30:
                logger.info(f"  [{elapsed:.0f}s] Still running ({timeout - elapsed:.0f}s remaining)")
                last_progress_log = time.time()

            ready, _, _ = select.select([master_fd], [], [], 0.1)
            if ready:
                try:
                    data = os.read(master_fd, 4096)
                except OSError:
                    break
                if data:
                    record(data)

        if not timed_out and process.poll() is not None:
            # Leftover group members (qemu, virtiofsd) would hold the PTY open
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

        # Drain whatever is left in the PTY
        drain_deadline = time.time() + PTY_DRAIN_TIMEOUT
        while time.time() < drain_deadline:
            ready, _, _ = select.select([master_fd], [], [], 0.1)
            if not ready:
                break
            try:
                data = os.read(master_fd, 4096)
            except OSError:
                break
            if not data:
                break
            record(data)

        exit_code = process.wait()
        output_str = b"".join(output).decode("utf-8", errors="replace")

        final_log_path = log_file_path
        if log_file_path.exists():
            if timed_out:
                status = "timeout"
            else:
                status = "success" if exit_code == 0 else "failure"
            final_log_path = log_file_path.with_name(
                log_file_path.name.replace("-running.log", f"-{status}.log")
            )
            try:
                log_file_path.rename(final_log_path)
            except OSError as e:
                logger.warning(f"Failed to rename log file: {e}")
                final_log_path = log_file_path

        return exit_code, output_str, timed_out, final_log_path

    finally:
        if log_file_handle:
            try:
                log_file_handle.write("\n\n=== VM Process Terminated ===\n")
                log_file_handle.write(f"Ended: {datetime.datetime.now().isoformat()}\n")
                log_file_handle.close()
            except OSError:
                pass

        if process and process.poll() is None:
            try:
                os.killpg(os.getpgid(process.pid), signal.SIGKILL)
            except (ProcessLookupError, OSError):
                pass
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                pass

        if slave_fd is not None:
            os.close(slave_fd)
        try:
            os.close(master_fd)
        except OSError:
            pass


class VmLauncher:
    """Boots resolved kernels with virtme-ng and runs a guest command."""

    DEFAULT_TIMEOUT = 3600

    def __init__(self, workspace: Optional[Path] = None, timeout: int = DEFAULT_TIMEOUT):
        """Initialize VM launcher.

        Args:
            workspace: Directory vng is started from (default: cwd)
            timeout: Default guest timeout in seconds
        """
        self.workspace = Path(workspace).resolve() if workspace else Path.cwd()
        self.timeout = timeout

    def check_virtme_ng(self) -> bool:
        """Check if virtme-ng is installed."""
        try:
            result = subprocess.run(["vng", "--version"], capture_output=True, text=True, timeout=5)
            return result.returncode == 0
        except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
            return False

    def check_qemu(self, arch: ArchInfo) -> Tuple[bool, str]:
        """Check if the QEMU system emulator for the architecture is installed.

        Returns:
            Tuple of (is_available, version line or error message)
        """
        try:
            result = subprocess.run(
                [arch.qemu_system, "--version"], capture_output=True, text=True, timeout=5
            )
            if result.returncode == 0:
                return True, result.stdout.splitlines()[0] if result.stdout else arch.qemu_system
            return False, f"QEMU binary '{arch.qemu_system}' exists but returned error"
        except FileNotFoundError:
            return False, f"QEMU binary '{arch.qemu_system}' not found in PATH"
        except (OSError, subprocess.TimeoutExpired) as e:
            return False, f"Error checking QEMU: {e}"

    def use_kvm(self, arch: ArchInfo) -> bool:
        """Hardware acceleration only for host-architecture guests with /dev/kvm."""
        if arch != host_arch():
            return False
        return os.access(KVM_DEVICE, os.R_OK | os.W_OK)

    def build_command(
        self,
        kernel: ResolvedKernel,
        environment: GuestEnvironment,
        guest_command: List[str],
        resources: VmResources,
        persist_artifacts: bool = True,
        dry_run: bool = False,
    ) -> List[str]:
        """Build the vng invocation for a guest session."""
        cmd = ["vng", "--verbose", "--run", str(kernel.image_path)]
        cmd.extend(["--memory", resources.memory])
        cmd.extend(["--cpus", str(resources.cpus)])

        if kernel.arch != host_arch():
            cmd.extend(["--arch", kernel.arch.vng_arch])
        if not self.use_kvm(kernel.arch):
            cmd.append("--disable-kvm")

        if environment.is_cross_arch:
            cmd.extend(["--root", str(environment.rootfs)])
            if environment.init_helper_path:
                cmd.extend(["--busybox", str(environment.init_helper_path)])

        cmd.extend(["--cwd", str(environment.workspace)])

        if persist_artifacts:
            for rw_dir in environment.rw_dirs:
                if any(rw_dir == tmp or tmp in rw_dir.parents for tmp in HOST_TEMP_DIRS):
                    logger.warning(f"⚠ Not passing host temp directory {rw_dir} as --rwdir")
                    continue
                cmd.append(f"--rwdir={rw_dir}")

        if environment.qemu_opts:
            cmd.append("--qemu-opts=" + " ".join(environment.qemu_opts))

        if dry_run:
            # vng forwards --show-command to virtme-run itself
            cmd.append("--dry-run")

        cmd.append("--")
        cmd.extend(guest_command)
        return cmd

    def launch(
        self,
        kernel: ResolvedKernel,
        environment: GuestEnvironment,
        guest_command: List[str],
        resources: Optional[VmResources] = None,
        timeout: Optional[int] = None,
        persist_artifacts: bool = True,
        dry_run: bool = False,
    ) -> LaunchResult:
        """Boot the kernel in a guest and run a command to completion.

        Args:
            kernel: Resolved kernel to boot
            environment: Provisioned guest environment for the kernel
            guest_command: Command (argv) to run inside the guest
            resources: Memory/vCPU limits (default: 4G, 2 CPUs)
            timeout: Guest timeout in seconds (default: launcher timeout)
            persist_artifacts: Mount the workspace read-write so results reach the host
            dry_run: Print the QEMU invocation instead of booting

        Returns:
            LaunchResult with the guest command's exit code and console output

        Raises:
            KernelArtifactMissingError: Kernel image or modules absent
            ToolMissingError: vng or the QEMU emulator is not installed
            ProvisioningError: Environment does not match the kernel
        """
        resources = resources or VmResources()
        timeout = timeout or self.timeout
        session = VmSession(
            kernel=kernel,
            environment=environment,
            guest_command=list(guest_command),
            resources=resources,
        )

        logger.info("=" * 60)
        logger.info(f"Launching guest: kernel {kernel.release} ({kernel.arch.name})")
        logger.info(f"Config: memory={resources.memory}, cpus={resources.cpus}, timeout={timeout}s")
        logger.info(f"Environment: {environment.summary()}")

        kernel.verify()
        if not environment.matches_kernel(kernel):
            raise ProvisioningError(
                f"Guest environment ({environment.arch.name}, modules "
                f"{environment.injected_modules}) does not match kernel {kernel.release}"
            )
        if not self.check_virtme_ng():
            raise ToolMissingError("virtme-ng (vng) not found. Install with: pip install virtme-ng")
        qemu_available, qemu_info = self.check_qemu(kernel.arch)
        if not qemu_available:
            raise ToolMissingError(qemu_info)
        logger.info(f"✓ QEMU available: {qemu_info}")

        cmd = self.build_command(
            kernel, environment, guest_command, resources,
            persist_artifacts=persist_artifacts, dry_run=dry_run,
        )
        logger.info(f"Command: {' '.join(cmd)}")
        start_time = time.time()

        if dry_run:
            return self._dry_run(cmd, start_time)

        _cleanup_old_logs()
        session.transition(VmSessionState.BOOTING)
        try:
            exit_code, output, timed_out, log_file = _run_with_pty(
                cmd,
                self.workspace,
                timeout,
                description=f"kernel tests on {kernel.release}",
                on_start=lambda: session.transition(VmSessionState.RUNNING),
            )
        except OSError as e:
            session.transition(VmSessionState.FAILED)
            logger.error(f"✗ Failed to start guest: {e}")
            logger.info("=" * 60)
            return LaunchResult(
                exit_code=-1,
                output=f"ERROR: {e}",
                state=session.state,
                duration=time.time() - start_time,
                command=cmd,
            )

        if timed_out:
            session.transition(VmSessionState.TIMED_OUT)
        elif exit_code != 0 and "Kernel panic" in output:
            session.transition(VmSessionState.FAILED)
        else:
            session.transition(VmSessionState.COMPLETED)

        result = LaunchResult(
            exit_code=exit_code,
            output=output,
            state=session.state,
            duration=time.time() - start_time,
            command=cmd,
            log_file_path=log_file,
        )
        if result.success:
            logger.info(result.summary())
        else:
            logger.error(result.summary())
        logger.info(f"Boot log saved: {log_file}")
        logger.info("=" * 60)
        return result

    def _dry_run(self, cmd: List[str], start_time: float) -> LaunchResult:
        try:
            result = subprocess.run(cmd, cwd=self.workspace, capture_output=True, text=True, timeout=60)
            output = result.stdout + result.stderr
            exit_code = result.returncode
        except (OSError, subprocess.TimeoutExpired) as e:
            output = f"ERROR: {e}"
            exit_code = -1

        logger.info("Dry run complete, no guest booted")
        logger.info("=" * 60)
        return LaunchResult(
            exit_code=exit_code,
            output=output,
            state=VmSessionState.PROVISIONING,
            duration=time.time() - start_time,
            command=cmd,
            dry_run=True,
        )


def format_launch_result(result: LaunchResult, tail_lines: int = 200) -> str:
    """Format launch result for display.

    Args:
        result: LaunchResult to format
        tail_lines: Console lines to show when the guest did not succeed

    Returns:
        Formatted string
    """
    lines = [result.summary(), ""]

    if result.log_file_path:
        lines.append(f"Full boot log: {result.log_file_path}")
        lines.append("")

    if result.dry_run:
        lines.append("Launch command:")
        lines.append("  " + " ".join(result.command))
        if result.output:
            lines.append("")
            lines.append(result.output.rstrip())
        return "\n".join(lines)

    if not result.success and result.output:
        output_lines = result.output.splitlines()
        total_lines = len(output_lines)
        last_lines = output_lines[-tail_lines:]

        lines.append(f"Console Output (last {len(last_lines)} lines of {total_lines} total):")
        lines.append("=" * 80)
        start_line_num = total_lines - len(last_lines) + 1
        for i, line in enumerate(last_lines, start=start_line_num):
            lines.append(f"{i:5d} | {line}")
        lines.append("=" * 80)

    return "\n".join(lines)
