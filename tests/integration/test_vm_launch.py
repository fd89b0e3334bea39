"""
Integration test booting the running host kernel with virtme-ng.

Skipped unless vng, the host QEMU and a readable /boot image are present.
"""
import os
import platform
import shutil
import pytest
from pathlib import Path

from kerneltest_mcp.boot_manager import VmLauncher, VmSessionState
from kerneltest_mcp.config import VmResources
from kerneltest_mcp.environment_manager import EnvironmentProvisioner
from kerneltest_mcp.kernel_resolver import KernelResolver, KernelSpec

pytestmark = pytest.mark.integration

HOST_IMAGE = Path("/boot") / f"vmlinuz-{platform.release()}"

requires_vm = pytest.mark.skipif(
    shutil.which("vng") is None or not os.access(HOST_IMAGE, os.R_OK),
    reason="Requires virtme-ng and a readable host kernel image",
)


@requires_vm
def test_guest_exit_code_reaches_host(tmp_path, monkeypatch):
    """A command exiting 7 in the guest makes the session result 7."""
    monkeypatch.setattr("kerneltest_mcp.config.BOOT_LOG_DIR", tmp_path / "vm-logs")
    workspace = Path.home() / ".kerneltest-mcp" / "integration"
    workspace.mkdir(parents=True, exist_ok=True)

    kernel = KernelResolver().resolve(KernelSpec.host_default())
    environment = EnvironmentProvisioner(workspace=workspace).provision(kernel)
    launcher = VmLauncher(workspace=workspace, timeout=300)

    result = launcher.launch(
        kernel,
        environment,
        ["sh", "-c", "uname -r; exit 7"],
        resources=VmResources(memory="1G", cpus=1),
        persist_artifacts=False,
    )

    assert result.state == VmSessionState.COMPLETED
    assert result.exit_code == 7
    assert kernel.release in result.output
    assert result.log_file_path.exists()


@requires_vm
def test_dry_run_prints_invocation(tmp_path):
    kernel = KernelResolver().resolve(KernelSpec.host_default())
    environment = EnvironmentProvisioner(workspace=tmp_path).provision(kernel)

    result = VmLauncher(workspace=tmp_path).launch(kernel, environment, ["true"], dry_run=True)

    assert result.dry_run
    assert not result.success
    assert result.state == VmSessionState.PROVISIONING
    assert result.exit_code == 0
    assert "qemu-system-" in result.output
