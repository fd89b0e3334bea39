"""
Command line entry points.

  run          resolve, provision and boot a kernel, then run the guest phases in it
  guest        run the guest phases (invoked inside the VM by `run`)
  supervise    run the tracing workload under supervision
  host-phases  run the phases that need no guest
"""
import argparse
import logging
import platform
import sys
from pathlib import Path
from typing import List, Optional

from .boot_manager import VmLauncher, format_launch_result
from .config import DEFAULT_ARTIFACTS_DIR, DEFAULT_WORKLOAD_BINARY, RunEnvironment, VmResources
from .environment_manager import EnvironmentProvisioner, GuestEnvironment
from .errors import PreconditionError, ProvisioningError
from .guest_supervisor import HEALTH_URL, GuestSupervisor, WorkloadConfig, format_supervisor_result
from .kernel_resolver import KernelResolver, KernelSpec
from .phase_runner import (
    PhaseAggregator,
    default_guest_phases,
    default_host_phases,
    format_aggregate_result,
)

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PRECONDITION = 2


def check_workload_binary(binary: Path) -> None:
    """Raise WorkloadMissingError unless the pre-built workload is present."""
    GuestSupervisor(WorkloadConfig(binary=binary, artifacts_dir=DEFAULT_ARTIFACTS_DIR)).check_binary()


def guest_command(environment: GuestEnvironment, artifacts_dir: Path, binary: Path) -> List[str]:
    """Command the VM runs: this package's `guest` subcommand."""
    cmd = ["env"]
    if environment.guest_pythonpath:
        cmd.append(f"PYTHONPATH={environment.guest_pythonpath}")
    cmd.extend([
        "python3", "-m", "kerneltest_mcp", "guest",
        "--artifacts-dir", str(artifacts_dir),
        "--binary", str(binary),
    ])
    return cmd


def command_run(args: argparse.Namespace) -> int:
    workspace = Path(args.workspace).resolve()
    binary = Path(args.binary)
    check_workload_binary(workspace / binary)

    spec = KernelSpec(version_token=args.kernel_version, architecture=args.arch or "")
    kernel = KernelResolver(boot_dir=args.boot_dir, modules_dir=args.modules_dir).resolve(spec)

    provisioner = EnvironmentProvisioner(
        workspace=workspace,
        cache_dir=args.cache_dir,
        busybox_path=args.busybox,
    )
    environment = provisioner.provision(kernel)

    launcher = VmLauncher(workspace=workspace, timeout=args.timeout)
    result = launcher.launch(
        kernel,
        environment,
        guest_command(environment, Path(args.artifacts_dir), binary),
        resources=VmResources(memory=args.memory, cpus=args.cpus),
        dry_run=args.dry_run,
    )
    print(format_launch_result(result))

    if result.dry_run:
        return EXIT_SUCCESS
    return EXIT_SUCCESS if result.success else EXIT_FAILURE


def _run_environment(args: argparse.Namespace) -> RunEnvironment:
    run_env = RunEnvironment(offline=not args.online)
    run_env.ensure_directories()
    return run_env


def command_guest(args: argparse.Namespace) -> int:
    binary = Path(args.binary)
    check_workload_binary(binary)

    artifacts_dir = Path(args.artifacts_dir)
    phases = default_guest_phases(_run_environment(args), artifacts_dir=artifacts_dir, workload_binary=binary)
    result = PhaseAggregator(artifacts_dir).run(phases)
    print(format_aggregate_result(result))
    return result.exit_code


def command_host_phases(args: argparse.Namespace) -> int:
    result = PhaseAggregator(Path(args.artifacts_dir)).run(default_host_phases(_run_environment(args)))
    print(format_aggregate_result(result))
    return result.exit_code


def command_supervise(args: argparse.Namespace) -> int:
    workload = WorkloadConfig(
        binary=Path(args.binary),
        artifacts_dir=Path(args.artifacts_dir),
        policy_path=Path(args.policy) if args.policy else None,
        health_url=args.health_url,
    )
    result = GuestSupervisor(workload, max_attempts=args.max_attempts).run()
    print(format_supervisor_result(result))
    return EXIT_SUCCESS if result.success else EXIT_FAILURE


def _add_workload_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--binary", default=str(DEFAULT_WORKLOAD_BINARY),
                        help="Pre-built workload binary (default: %(default)s)")
    parser.add_argument("--artifacts-dir", default=str(DEFAULT_ARTIFACTS_DIR),
                        help="Directory for logs and workload output (default: %(default)s)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kerneltest-run",
        description="Run kernel tracing tests against installed kernels in virtme-ng guests",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Boot a kernel and run the guest phases in it")
    run_parser.add_argument("kernel_version", nargs="?", default=platform.release(),
                            help="Release or symbolic version like v6.12 (default: running kernel)")
    run_parser.add_argument("arch", nargs="?", default=None,
                            help="Target architecture: x86_64/amd64 or arm64/aarch64 (default: host)")
    run_parser.add_argument("--memory", default=VmResources.memory, help="Guest memory (default: %(default)s)")
    run_parser.add_argument("--cpus", type=int, default=VmResources.cpus, help="Guest vCPUs (default: %(default)s)")
    run_parser.add_argument("--timeout", type=int, default=VmLauncher.DEFAULT_TIMEOUT,
                            help="Guest timeout in seconds (default: %(default)s)")
    run_parser.add_argument("--dry-run", action="store_true", help="Print the QEMU invocation without booting")
    run_parser.add_argument("--workspace", default=".", help="Workspace shared with the guest (default: cwd)")
    run_parser.add_argument("--cache-dir", default=None, help="Cache for cross-arch guest roots")
    run_parser.add_argument("--boot-dir", default=None, help="Kernel image directory (default: /boot)")
    run_parser.add_argument("--modules-dir", default=None, help="Kernel modules directory (default: /lib/modules)")
    run_parser.add_argument("--busybox", default=None, help="Static busybox for the target architecture")
    _add_workload_arguments(run_parser)
    run_parser.set_defaults(func=command_run)

    guest_parser = subparsers.add_parser("guest", help="Run the guest phases (inside the VM)")
    _add_workload_arguments(guest_parser)
    guest_parser.add_argument("--online", action="store_true", help="Allow network dependency resolution")
    guest_parser.set_defaults(func=command_guest)

    host_parser = subparsers.add_parser("host-phases", help="Run the phases that need no guest")
    host_parser.add_argument("--artifacts-dir", default=str(DEFAULT_ARTIFACTS_DIR),
                             help="Directory for phase logs (default: %(default)s)")
    host_parser.add_argument("--online", action="store_true", help="Allow network dependency resolution")
    host_parser.set_defaults(func=command_host_phases)

    supervise_parser = subparsers.add_parser("supervise", help="Run the workload under supervision")
    _add_workload_arguments(supervise_parser)
    supervise_parser.add_argument("--policy", default=None, help="Workload policy file (default: generated)")
    supervise_parser.add_argument("--health-url", default=HEALTH_URL, help="Readiness endpoint (default: %(default)s)")
    supervise_parser.add_argument("--max-attempts", type=int, default=GuestSupervisor.MAX_ATTEMPTS,
                                  help="Readiness poll budget (default: %(default)s)")
    supervise_parser.set_defaults(func=command_supervise)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        return args.func(args)
    except (PreconditionError, ProvisioningError, ValueError) as e:
        logger.error(f"✗ {e}")
        return EXIT_PRECONDITION
