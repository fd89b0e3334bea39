"""
MCP server for running kernel tracing tests in virtme-ng guests.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.types import Tool, TextContent

from .boot_manager import VmLauncher, format_launch_result
from .cli import check_workload_binary, guest_command
from .config import DEFAULT_ARTIFACTS_DIR, DEFAULT_WORKLOAD_BINARY, RunEnvironment, VmResources, host_arch, normalize_arch
from .environment_manager import EnvironmentProvisioner
from .kernel_resolver import KernelResolver, KernelSpec
from .phase_runner import PhaseAggregator, default_host_phases, format_aggregate_result

# Configure logging - log to both file and stderr
# File logging allows tailing progress: tail -f /tmp/kerneltest-mcp.log
log_file = Path("/tmp/kerneltest-mcp.log")
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(log_file, mode='a'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)
logger.info("=" * 80)
logger.info("kerneltest-mcp server starting")
logger.info(f"Log file: {log_file}")
logger.info("=" * 80)

app = Server("kerneltest-mcp")

_KERNEL_PROPERTIES = {
    "kernel_version": {
        "type": "string",
        "description": "Kernel release (e.g. 6.12.3-061203-generic) or symbolic version (e.g. v6.12) "
                       "selecting the latest installed match. Default: running kernel"
    },
    "arch": {
        "type": "string",
        "description": "Target architecture",
        "enum": ["x86_64", "amd64", "arm64", "aarch64"]
    },
    "boot_dir": {
        "type": "string",
        "description": "Directory with vmlinuz-<release> images (default: /boot)"
    },
    "modules_dir": {
        "type": "string",
        "description": "Directory with <release> module trees (default: /lib/modules)"
    },
}


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available MCP tools."""
    return [
        Tool(
            name="resolve_kernel",
            description="Resolve a kernel version to an installed kernel image and module tree",
            inputSchema={
                "type": "object",
                "properties": dict(_KERNEL_PROPERTIES),
            }
        ),
        Tool(
            name="provision_guest_environment",
            description="Prepare the guest root filesystem for a kernel. Native kernels reuse the host "
                        "rootfs; foreign-architecture kernels get a cached Ubuntu base root with the "
                        "kernel's modules injected",
            inputSchema={
                "type": "object",
                "properties": {
                    **_KERNEL_PROPERTIES,
                    "workspace": {
                        "type": "string",
                        "description": "Workspace shared with the guest (default: cwd)"
                    },
                    "cache_dir": {
                        "type": "string",
                        "description": "Cache directory for cross-arch roots"
                    },
                },
            }
        ),
        Tool(
            name="vm_run_kernel_tests",
            description="Boot a kernel with virtme-ng and run the workload smoke test and e2e test "
                        "phases inside the guest. Requires the workload to be built on the host first",
            inputSchema={
                "type": "object",
                "properties": {
                    **_KERNEL_PROPERTIES,
                    "workspace": {
                        "type": "string",
                        "description": "Workspace shared with the guest (default: cwd)"
                    },
                    "cache_dir": {
                        "type": "string",
                        "description": "Cache directory for cross-arch roots"
                    },
                    "memory": {
                        "type": "string",
                        "description": "Guest memory",
                        "default": "4G"
                    },
                    "cpus": {
                        "type": "integer",
                        "description": "Guest vCPUs",
                        "default": 2
                    },
                    "timeout": {
                        "type": "integer",
                        "description": "Guest timeout in seconds",
                        "default": VmLauncher.DEFAULT_TIMEOUT
                    },
                    "dry_run": {
                        "type": "boolean",
                        "description": "Show the QEMU invocation without booting",
                        "default": False
                    },
                },
            }
        ),
        Tool(
            name="run_host_phases",
            description="Run the compatibility, instrumentation and network test phases on the host",
            inputSchema={
                "type": "object",
                "properties": {
                    "workspace": {
                        "type": "string",
                        "description": "Repository to run the phases in (default: cwd)"
                    },
                    "online": {
                        "type": "boolean",
                        "description": "Allow network dependency resolution",
                        "default": False
                    },
                },
            }
        ),
        Tool(
            name="check_virtme_ng",
            description="Check that virtme-ng and the QEMU emulator for an architecture are installed",
            inputSchema={
                "type": "object",
                "properties": {
                    "arch": _KERNEL_PROPERTIES["arch"],
                },
            }
        ),
    ]


def _resolve(arguments: dict):
    spec = KernelSpec(
        version_token=arguments.get("kernel_version") or KernelSpec.host_default().version_token,
        architecture=arguments.get("arch", ""),
    )
    resolver = KernelResolver(
        boot_dir=arguments.get("boot_dir"),
        modules_dir=arguments.get("modules_dir"),
    )
    return resolver.resolve(spec)


def _provisioner(arguments: dict) -> EnvironmentProvisioner:
    return EnvironmentProvisioner(
        workspace=arguments.get("workspace"),
        cache_dir=arguments.get("cache_dir"),
    )


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    logger.info("=" * 80)
    logger.info(f"TOOL CALL: {name}")
    logger.info(f"Arguments: {arguments}")
    logger.info("=" * 80)
    arguments = arguments or {}

    try:
        if name == "resolve_kernel":
            kernel = await asyncio.to_thread(_resolve, arguments)
            result = {
                "release": kernel.release,
                "arch": kernel.arch.name,
                "image_path": str(kernel.image_path),
                "modules_path": str(kernel.modules_path),
                "initrd_path": str(kernel.initrd_path) if kernel.initrd_path else None,
            }
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        elif name == "provision_guest_environment":
            kernel = await asyncio.to_thread(_resolve, arguments)
            environment = await asyncio.to_thread(_provisioner(arguments).provision, kernel)

            output = f"✓ {environment.summary()}"
            if environment.warnings:
                output += f"\n\nWarnings ({len(environment.warnings)}):"
                for warning in environment.warnings:
                    output += f"\n  ⚠ {warning}"
            return [TextContent(type="text", text=output)]

        elif name == "vm_run_kernel_tests":
            provisioner = _provisioner(arguments)
            workspace = provisioner.workspace
            check_workload_binary(workspace / DEFAULT_WORKLOAD_BINARY)

            kernel = await asyncio.to_thread(_resolve, arguments)
            environment = await asyncio.to_thread(provisioner.provision, kernel)

            resources = VmResources(
                memory=arguments.get("memory", VmResources.memory),
                cpus=arguments.get("cpus", VmResources.cpus),
            )
            launcher = VmLauncher(workspace=workspace, timeout=arguments.get("timeout", VmLauncher.DEFAULT_TIMEOUT))
            result = await asyncio.to_thread(
                launcher.launch,
                kernel,
                environment,
                guest_command(environment, DEFAULT_ARTIFACTS_DIR, DEFAULT_WORKLOAD_BINARY),
                resources=resources,
                dry_run=arguments.get("dry_run", False),
            )

            output = format_launch_result(result)
            output += "\n\nRun Configuration:"
            output += f"\n  Kernel: {kernel.release} ({kernel.arch.name})"
            output += f"\n  Environment: {environment.summary()}"
            output += f"\n  Memory: {resources.memory}"
            output += f"\n  CPUs: {resources.cpus}"
            if not result.dry_run:
                output += f"\n  Artifacts: {workspace / DEFAULT_ARTIFACTS_DIR}"
            return [TextContent(type="text", text=output)]

        elif name == "run_host_phases":
            workspace = Path(arguments.get("workspace") or Path.cwd()).resolve()
            run_env = RunEnvironment(offline=not arguments.get("online", False))
            run_env.ensure_directories()

            # Phase output would corrupt the stdio protocol stream, so echo to the log instead
            aggregator = PhaseAggregator(workspace / DEFAULT_ARTIFACTS_DIR, cwd=workspace, stream=_LogStream())
            result = await asyncio.to_thread(aggregator.run, default_host_phases(run_env))
            return [TextContent(type="text", text=format_aggregate_result(result))]

        elif name == "check_virtme_ng":
            arch = normalize_arch(arguments["arch"]) if arguments.get("arch") else host_arch()
            launcher = VmLauncher()
            vng_available = launcher.check_virtme_ng()
            qemu_available, qemu_info = launcher.check_qemu(arch)

            output_lines = ["Kernel Boot Prerequisites Check", "=" * 60, ""]
            if vng_available:
                output_lines.append("✓ virtme-ng: installed")
            else:
                output_lines.append("✗ virtme-ng: Not found")
                output_lines.append("  Install with: pip install virtme-ng")
            if qemu_available:
                output_lines.append(f"✓ QEMU ({arch.name}): {qemu_info}")
            else:
                output_lines.append(f"✗ QEMU ({arch.name}): {qemu_info}")
            output_lines.append(f"  KVM acceleration: {'yes' if launcher.use_kvm(arch) else 'no'}")
            return [TextContent(type="text", text="\n".join(output_lines))]

        else:
            raise ValueError(f"Unknown tool: {name}")

    except Exception as e:
        logger.error(f"Error in tool {name}: {e}", exc_info=True)
        return [TextContent(type="text", text=f"Error: {str(e)}")]


class _LogStream:
    """File-like sink forwarding phase output lines to the server log."""

    def write(self, text: str) -> int:
        for line in text.splitlines():
            logger.info(f"  | {line}")
        return len(text)

    def flush(self) -> None:
        for handler in logging.getLogger().handlers:
            handler.flush()


def main():
    """Main entry point for the MCP server."""
    import mcp.server.stdio

    async def run():
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options()
            )

    asyncio.run(run())


if __name__ == "__main__":
    main()
