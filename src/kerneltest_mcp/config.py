"""
Run configuration - architectures, VM resources and the isolated guest environment.
"""
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

# Per-user state: cached cross-arch roots and VM boot logs
DEFAULT_STATE_DIR = Path.home() / ".kerneltest-mcp"
DEFAULT_ROOTFS_CACHE_DIR = DEFAULT_STATE_DIR / "rootfs-cache"
BOOT_LOG_DIR = DEFAULT_STATE_DIR / "vm-logs"

DEFAULT_BOOT_DIR = Path("/boot")
DEFAULT_MODULES_DIR = Path("/lib/modules")

DEFAULT_ARTIFACTS_DIR = Path("qemu-artifacts")
DEFAULT_WORKLOAD_BINARY = Path("dist/tracee")


@dataclass(frozen=True)
class ArchInfo:
    """Naming of one architecture across the tools we drive."""

    name: str  # Canonical name (x86_64, arm64)
    vng_arch: str  # virtme-ng --arch value
    qemu_system: str  # QEMU full-system emulator
    dpkg_arch: str  # Debian/Ubuntu package architecture
    qemu_user_static: str  # Static user-mode emulator for foreign binaries


ARCHITECTURES: Dict[str, ArchInfo] = {
    "x86_64": ArchInfo(
        name="x86_64",
        vng_arch="amd64",
        qemu_system="qemu-system-x86_64",
        dpkg_arch="amd64",
        qemu_user_static="qemu-x86_64-static",
    ),
    "arm64": ArchInfo(
        name="arm64",
        vng_arch="arm64",
        qemu_system="qemu-system-aarch64",
        dpkg_arch="arm64",
        qemu_user_static="qemu-aarch64-static",
    ),
}

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def normalize_arch(arch: str) -> ArchInfo:
    """Map any accepted spelling of an architecture to its ArchInfo.

    Args:
        arch: Architecture name (e.g., "aarch64", "arm64", "amd64", "x86_64")

    Returns:
        ArchInfo for the architecture

    Raises:
        ValueError: If the architecture is not supported
    """
    canonical = _ARCH_ALIASES.get(arch.strip().lower())
    if canonical is None:
        supported = ", ".join(sorted(_ARCH_ALIASES))
        raise ValueError(f"Unsupported architecture: {arch} (supported: {supported})")
    return ARCHITECTURES[canonical]


def host_arch() -> ArchInfo:
    """Return the ArchInfo of the machine we are running on."""
    return normalize_arch(platform.machine())


@dataclass
class VmResources:
    """Memory and vCPU limits applied to a guest."""

    memory: str = "4G"
    cpus: int = 2

    def __post_init__(self):
        if self.cpus < 1:
            raise ValueError(f"cpus must be at least 1, got {self.cpus}")


@dataclass
class RunEnvironment:
    """Isolated home/cache paths and offline switches for build-verification phases.

    The values are rendered into a fresh environment mapping by to_env();
    the current process environment is never modified.
    """

    home: Path = Path("/tmp/root")
    gopath: Path = Path("/tmp/go")
    gocache: Path = Path("/tmp/go-cache")
    extra_path: List[str] = field(default_factory=lambda: ["/usr/local/go/bin"])
    offline: bool = True
    extra_vars: Dict[str, str] = field(default_factory=dict)

    def to_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Build the environment for a phase command.

        Args:
            base: Environment to start from (default: a copy of os.environ)

        Returns:
            New environment dictionary
        """
        env = dict(os.environ if base is None else base)
        env["HOME"] = str(self.home)
        env["GOPATH"] = str(self.gopath)
        env["GOCACHE"] = str(self.gocache)

        path_entries = [p for p in env.get("PATH", "").split(os.pathsep) if p]
        for entry in self.extra_path + [str(self.gopath / "bin")]:
            if entry not in path_entries:
                path_entries.append(entry)
        env["PATH"] = os.pathsep.join(path_entries)

        if self.offline:
            env["GOFLAGS"] = "-mod=vendor"
            env["GOPROXY"] = "off"
            env["GOTOOLCHAIN"] = "local"

        env.update(self.extra_vars)
        return env

    def ensure_directories(self) -> None:
        """Create the isolated home and cache directories."""
        for path in (self.home, self.gopath, self.gocache):
            path.mkdir(parents=True, exist_ok=True)
