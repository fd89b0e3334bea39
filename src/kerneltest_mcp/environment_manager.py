"""
Provision guest execution environments for kernel test runs.

A native guest reuses the host root filesystem. A cross-architecture guest
gets a synthesized Ubuntu base root for the target architecture, with the
kernel's modules injected and QEMU user-mode emulation available so the
root can be populated through chroot on the host.
"""
import logging
import os
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional

import requests

from .config import DEFAULT_ROOTFS_CACHE_DIR, ArchInfo, host_arch
from .errors import ProvisioningError
from .kernel_resolver import ResolvedKernel

logger = logging.getLogger(__name__)

UBUNTU_BASE_URL = (
    "https://cdimage.ubuntu.com/ubuntu-base/releases/{release}/release/"
    "ubuntu-base-{point_release}-base-{arch}.tar.gz"
)

# virtme-ng overlays these in the guest; they must never be passed as --rwdir
HOST_TEMP_DIRS = (Path("/tmp"), Path("/var/tmp"))

# Where this package is installed inside synthesized roots
GUEST_PACKAGE_DIR = Path("/opt/kerneltest-mcp")

# Directory to put on PYTHONPATH to import this package from the host rootfs
PACKAGE_SOURCE_ROOT = Path(__file__).resolve().parent.parent


class EnvironmentKind(Enum):
    """How the guest root filesystem is obtained."""

    NATIVE = "native"
    CROSS_ARCH = "cross_arch"


@dataclass
class GuestEnvironment:
    """A guest root filesystem ready to boot with a resolved kernel."""

    kind: EnvironmentKind
    arch: ArchInfo
    workspace: Path
    rw_dirs: List[Path] = field(default_factory=list)

    # Cross-architecture only
    rootfs: Optional[Path] = None
    base_image_id: Optional[str] = None
    injected_modules: Optional[str] = None  # Release whose modules are in the root
    emulation_helper_path: Optional[Path] = None
    init_helper_path: Optional[Path] = None
    scratch_mount: Optional[Path] = None  # Workspace mount point inside the root
    dns_config: Optional[str] = None
    qemu_opts: List[str] = field(default_factory=list)

    # PYTHONPATH entry making kerneltest_mcp importable in the guest
    guest_pythonpath: Optional[Path] = None

    warnings: List[str] = field(default_factory=list)

    @property
    def is_cross_arch(self) -> bool:
        return self.kind == EnvironmentKind.CROSS_ARCH

    def matches_kernel(self, kernel: ResolvedKernel) -> bool:
        """Check that this environment may be booted with the given kernel."""
        if kernel.arch != self.arch:
            return False
        if self.is_cross_arch:
            return self.injected_modules == kernel.release
        return True

    def summary(self) -> str:
        if not self.is_cross_arch:
            rw = ", ".join(str(d) for d in self.rw_dirs) or "none"
            return f"Native {self.arch.name} guest (host rootfs, read-write: {rw})"
        return (
            f"Cross-arch {self.arch.name} guest: {self.rootfs} "
            f"(base {self.base_image_id}, modules {self.injected_modules or 'missing'})"
        )


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


class EnvironmentProvisioner:
    """Builds native and cross-architecture guest environments."""

    DEFAULT_UBUNTU_RELEASE = "22.04"
    DEFAULT_UBUNTU_POINT_RELEASE = "22.04.5"

    # Network client and trust store, plus the interpreter for the in-guest supervisor
    GUEST_PACKAGES = ["curl", "ca-certificates", "python3-minimal", "python3-requests"]

    INIT_HELPER_PACKAGE = "busybox-static"
    DNS_CONFIG = "nameserver 8.8.8.8\n"
    ENTROPY_DEVICE_OPTS = ["-device", "virtio-rng-pci"]
    CHROOT_BIND_MOUNTS = ("/dev", "/proc", "/sys")
    EMULATION_HELPER_DIRS = (Path("/usr/bin"), Path("/usr/local/bin"))
    BINFMT_DIR = Path("/proc/sys/fs/binfmt_misc")

    def __init__(
        self,
        workspace: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        ubuntu_release: Optional[str] = None,
        ubuntu_point_release: Optional[str] = None,
        packages: Optional[List[str]] = None,
        busybox_path: Optional[Path] = None,
        download_timeout: int = 300,
    ):
        """Initialize environment provisioner.

        Args:
            workspace: Host directory bound into the guest at the same path (default: cwd)
            cache_dir: Where synthesized roots are cached (default: ~/.kerneltest-mcp/rootfs-cache)
            ubuntu_release: Ubuntu base release directory (default: 22.04)
            ubuntu_point_release: Ubuntu base tarball version (default: 22.04.5)
            packages: Packages installed into cross-arch roots (default: GUEST_PACKAGES)
            busybox_path: Static busybox for the target architecture; when unset
                          busybox-static is installed into the root instead
            download_timeout: Timeout for the base image download in seconds
        """
        self.workspace = Path(workspace).resolve() if workspace else Path.cwd()
        self.cache_dir = Path(cache_dir) if cache_dir else DEFAULT_ROOTFS_CACHE_DIR
        self.ubuntu_release = ubuntu_release or self.DEFAULT_UBUNTU_RELEASE
        self.ubuntu_point_release = ubuntu_point_release or self.DEFAULT_UBUNTU_POINT_RELEASE
        self.packages = list(packages) if packages is not None else list(self.GUEST_PACKAGES)
        self.busybox_path = Path(busybox_path) if busybox_path else None
        self.download_timeout = download_timeout

    def base_image_id(self, arch: ArchInfo) -> str:
        return f"ubuntu-base-{self.ubuntu_point_release}-base-{arch.dpkg_arch}"

    def base_image_url(self, arch: ArchInfo) -> str:
        return UBUNTU_BASE_URL.format(
            release=self.ubuntu_release,
            point_release=self.ubuntu_point_release,
            arch=arch.dpkg_arch,
        )

    def rootfs_path(self, arch: ArchInfo) -> Path:
        return self.cache_dir / self.base_image_id(arch)

    def _marker(self, arch: ArchInfo, stage: str) -> Path:
        return self.cache_dir / f"{self.base_image_id(arch)}.{stage}"

    def check_cached(self, arch: ArchInfo) -> bool:
        """Check if a base root for the architecture is already extracted."""
        return self._marker(arch, "base-ready").exists() and self.rootfs_path(arch).is_dir()

    def provision(self, kernel: ResolvedKernel) -> GuestEnvironment:
        """Build the environment matching the kernel's architecture.

        Raises:
            ProvisioningError: If a fatal cross-arch step fails
        """
        if kernel.arch == host_arch():
            return self.provision_native(kernel)
        return self.provision_cross_arch(kernel)

    def provision_native(self, kernel: ResolvedKernel) -> GuestEnvironment:
        """Reuse the host root filesystem, binding the workspace read-write."""
        env = GuestEnvironment(
            kind=EnvironmentKind.NATIVE,
            arch=kernel.arch,
            workspace=self.workspace,
            scratch_mount=self.workspace,
            guest_pythonpath=PACKAGE_SOURCE_ROOT,
        )

        if any(_is_within(self.workspace, tmp) for tmp in HOST_TEMP_DIRS):
            msg = (
                f"Workspace {self.workspace} is inside a host temporary directory; "
                "not marking it read-write (artifacts will not persist to the host)"
            )
            logger.warning(f"⚠ {msg}")
            env.warnings.append(msg)
        else:
            env.rw_dirs.append(self.workspace)

        logger.info(f"✓ {env.summary()}")
        return env

    def provision_cross_arch(self, kernel: ResolvedKernel) -> GuestEnvironment:
        """Synthesize a foreign-architecture root filesystem for the kernel.

        Fetching the base image and locating the emulation helper are fatal;
        every other step logs a warning and provisioning continues. Steps
        already completed by an earlier run are skipped.

        Args:
            kernel: Resolved kernel whose modules are injected into the root

        Returns:
            GuestEnvironment for the synthesized root

        Raises:
            ProvisioningError: Base image fetch failed or emulation helper missing
        """
        arch = kernel.arch
        rootfs = self.rootfs_path(arch)

        logger.info("=" * 60)
        logger.info(f"Provisioning {arch.name} guest root at {rootfs}")

        env = GuestEnvironment(
            kind=EnvironmentKind.CROSS_ARCH,
            arch=arch,
            workspace=self.workspace,
            rw_dirs=[self.workspace],
            rootfs=rootfs,
        )

        env.base_image_id = self._fetch_base_image(arch, rootfs)
        env.emulation_helper_path = self._install_emulation_helper(arch, rootfs, env)
        self._install_packages(arch, rootfs, env)
        self._inject_modules(kernel, rootfs, env)
        self._install_init_helper(rootfs, env)
        self._create_workspace_mount(rootfs, env)
        self._write_dns_config(rootfs, env)
        self._install_guest_package(rootfs, env)
        env.qemu_opts.extend(self.ENTROPY_DEVICE_OPTS)

        if env.warnings:
            logger.warning(f"⚠ Guest root provisioned with {len(env.warnings)} warning(s)")
        else:
            logger.info("✓ Guest root provisioned")
        logger.info("=" * 60)
        return env

    # Steps

    def _fetch_base_image(self, arch: ArchInfo, rootfs: Path) -> str:
        image_id = self.base_image_id(arch)
        ready = self._marker(arch, "base-ready")
        if ready.exists() and rootfs.is_dir():
            logger.info(f"✓ Base image {image_id} already cached")
            return image_id

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        tarball = self.cache_dir / f"{image_id}.tar.gz"
        if not tarball.exists():
            self._download(self.base_image_url(arch), tarball)

        logger.info(f"  Extracting {tarball.name}...")
        rootfs.mkdir(parents=True, exist_ok=True)
        try:
            result = subprocess.run(
                self._privileged(["tar", "-xzf", str(tarball), "-C", str(rootfs)]),
                capture_output=True,
                text=True,
                timeout=600,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProvisioningError(f"Failed to extract base image {tarball}: {e}") from e

        if result.returncode != 0:
            raise ProvisioningError(f"Failed to extract base image {tarball}:\n{result.stderr}")

        ready.touch()
        logger.info(f"✓ Base image {image_id} extracted")
        return image_id

    def _download(self, url: str, dest: Path) -> None:
        logger.info(f"  Downloading {url}")
        partial = dest.with_name(dest.name + ".part")
        try:
            with requests.get(url, stream=True, timeout=self.download_timeout) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        f.write(chunk)
        except (requests.RequestException, OSError) as e:
            partial.unlink(missing_ok=True)
            raise ProvisioningError(f"Failed to download base image {url}: {e}") from e
        partial.rename(dest)

    def find_emulation_helper(self, arch: ArchInfo) -> Path:
        """Locate the host's static user-mode emulator for the architecture.

        Raises:
            ProvisioningError: If the helper is not installed
        """
        for directory in self.EMULATION_HELPER_DIRS:
            candidate = directory / arch.qemu_user_static
            if candidate.exists():
                return candidate
        raise ProvisioningError(
            f"{arch.qemu_user_static} not found in "
            f"{', '.join(str(d) for d in self.EMULATION_HELPER_DIRS)}. "
            "Install with: sudo apt-get install qemu-user-static binfmt-support"
        )

    def _install_emulation_helper(self, arch: ArchInfo, rootfs: Path, env: GuestEnvironment) -> Optional[Path]:
        helper = self.find_emulation_helper(arch)

        binfmt_entry = self.BINFMT_DIR / arch.qemu_user_static.replace("-static", "")
        if not binfmt_entry.exists():
            self._warn(env, f"binfmt handler {binfmt_entry} not registered; chroot may fail")

        guest_helper = rootfs / "usr" / "bin" / helper.name
        if guest_helper.exists():
            logger.info(f"✓ Emulation helper already present: {guest_helper}")
            return guest_helper

        if self._run_soft(
            self._privileged(["cp", str(helper), str(guest_helper)]),
            f"copy {helper.name} into guest root",
            env,
        ):
            logger.info(f"✓ Installed emulation helper {helper.name}")
            return guest_helper
        return None

    @contextmanager
    def chroot_binds(self, rootfs: Path) -> Iterator[List[Path]]:
        """Bind /dev, /proc and /sys into the root for the duration of the block.

        Every successful bind is unmounted in reverse order on exit, whether
        the block succeeded or raised.

        Raises:
            ProvisioningError: If a bind fails (earlier binds are released first)
        """
        mounted: List[Path] = []
        try:
            for source in self.CHROOT_BIND_MOUNTS:
                target = rootfs / source.lstrip("/")
                try:
                    result = subprocess.run(
                        self._privileged(["mount", "--bind", source, str(target)]),
                        capture_output=True,
                        text=True,
                        timeout=30,
                    )
                except (OSError, subprocess.TimeoutExpired) as e:
                    raise ProvisioningError(f"Failed to bind {source} into {rootfs}: {e}") from e
                if result.returncode != 0:
                    raise ProvisioningError(
                        f"Failed to bind {source} into {rootfs}: {result.stderr.strip()}"
                    )
                mounted.append(target)
            yield mounted
        finally:
            for target in reversed(mounted):
                try:
                    result = subprocess.run(
                        self._privileged(["umount", "-l", str(target)]),
                        capture_output=True,
                        text=True,
                        timeout=30,
                    )
                    if result.returncode != 0:
                        logger.warning(f"Failed to unmount {target}: {result.stderr.strip()}")
                except (OSError, subprocess.TimeoutExpired) as e:
                    logger.warning(f"Failed to unmount {target}: {e}")

    def _chroot_exec(self, rootfs: Path, script: str, description: str, env: GuestEnvironment,
                     timeout: int = 900) -> bool:
        try:
            with self.chroot_binds(rootfs):
                result = subprocess.run(
                    self._privileged(["chroot", str(rootfs), "/bin/sh", "-c", script]),
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                )
        except ProvisioningError as e:
            self._warn(env, f"{description}: {e}")
            return False
        except (OSError, subprocess.TimeoutExpired) as e:
            self._warn(env, f"{description} failed: {e}")
            return False

        if result.returncode != 0:
            self._warn(env, f"{description} exited {result.returncode}")
            logger.warning(f"Output: {result.stdout[-2000:]}")
            logger.warning(f"Errors: {result.stderr[-2000:]}")
            return False
        return True

    def _install_packages(self, arch: ArchInfo, rootfs: Path, env: GuestEnvironment) -> bool:
        ready = self._marker(arch, "packages-ready")
        if ready.exists():
            logger.info("✓ Guest packages already installed")
            return True
        if not self.packages:
            return True

        # Use the host resolver while apt runs; replaced by the static entry later
        try:
            host_resolv = Path("/etc/resolv.conf").read_text()
        except OSError:
            host_resolv = self.DNS_CONFIG
        self._write_resolv_conf(rootfs, host_resolv, env)

        logger.info(f"  Installing guest packages: {' '.join(self.packages)}")
        script = (
            "apt-get update -qq && "
            "DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends "
            + " ".join(self.packages)
        )
        if not self._chroot_exec(rootfs, script, "guest package install", env):
            return False

        ready.touch()
        logger.info("✓ Guest packages installed")
        return True

    def _inject_modules(self, kernel: ResolvedKernel, rootfs: Path, env: GuestEnvironment) -> None:
        target = rootfs / "lib" / "modules" / kernel.release
        logger.info(f"  Injecting modules for {kernel.release}")

        # -n: never overwrite files already in the root
        self._run_soft(self._privileged(["mkdir", "-p", str(target)]), "create module directory", env)
        copied = self._run_soft(
            self._privileged(["cp", "-a", "-n", f"{kernel.modules_path}/.", str(target)]),
            f"copy modules for {kernel.release}",
            env,
        )

        if target.is_dir() and any(target.iterdir()):
            env.injected_modules = kernel.release
            if copied:
                logger.info(f"✓ Modules for {kernel.release} present in guest root")
        else:
            self._warn(env, f"No modules for {kernel.release} in guest root")

    def _install_init_helper(self, rootfs: Path, env: GuestEnvironment) -> None:
        guest_busybox = rootfs / "bin" / "busybox"
        if not guest_busybox.exists():
            if self.busybox_path:
                self._run_soft(
                    self._privileged(["cp", str(self.busybox_path), str(guest_busybox)]),
                    "copy busybox into guest root",
                    env,
                )
            else:
                self._chroot_exec(
                    rootfs,
                    "DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends "
                    + self.INIT_HELPER_PACKAGE,
                    "init helper install",
                    env,
                )

        if guest_busybox.exists():
            env.init_helper_path = guest_busybox
            logger.info(f"✓ Init helper: {guest_busybox}")
        else:
            self._warn(env, "No static busybox in guest root; relying on guest init")

    def _create_workspace_mount(self, rootfs: Path, env: GuestEnvironment) -> None:
        mount_point = rootfs / self.workspace.relative_to(self.workspace.anchor)
        if self._run_soft(
            self._privileged(["mkdir", "-p", str(mount_point)]),
            "create workspace mount point",
            env,
        ):
            env.scratch_mount = self.workspace
            logger.info(f"✓ Workspace mount point: {mount_point}")

    def _write_dns_config(self, rootfs: Path, env: GuestEnvironment) -> None:
        if self._write_resolv_conf(rootfs, self.DNS_CONFIG, env):
            env.dns_config = self.DNS_CONFIG
            logger.info("✓ Static DNS configured")

    def _install_guest_package(self, rootfs: Path, env: GuestEnvironment) -> None:
        target = rootfs / GUEST_PACKAGE_DIR.relative_to("/")
        package = PACKAGE_SOURCE_ROOT / "kerneltest_mcp"
        if not self._run_soft(self._privileged(["mkdir", "-p", str(target)]),
                              "create guest package directory", env):
            return
        if self._run_soft(self._privileged(["cp", "-a", str(package), str(target)]),
                          "copy kerneltest_mcp into guest root", env):
            env.guest_pythonpath = GUEST_PACKAGE_DIR
            logger.info(f"✓ Guest supervisor installed at {GUEST_PACKAGE_DIR}")

    def _write_resolv_conf(self, rootfs: Path, content: str, env: GuestEnvironment) -> bool:
        resolv = rootfs / "etc" / "resolv.conf"
        # Base images ship resolv.conf as a dangling symlink into /run
        if not self._run_soft(self._privileged(["rm", "-f", str(resolv)]), "remove resolv.conf", env):
            return False
        return self._run_soft(
            self._privileged(["tee", str(resolv)]),
            "write resolv.conf",
            env,
            input=content,
        )

    # Helpers

    @staticmethod
    def _privileged(cmd: List[str]) -> List[str]:
        if os.geteuid() == 0:
            return cmd
        return ["sudo"] + cmd

    def _run_soft(self, cmd: List[str], description: str, env: GuestEnvironment,
                  input: Optional[str] = None, timeout: int = 300) -> bool:
        """Run a non-fatal provisioning command; failures become warnings."""
        try:
            result = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self._warn(env, f"Failed to {description}: {e}")
            return False

        if result.returncode != 0:
            self._warn(env, f"Failed to {description}: {result.stderr.strip()}")
            return False
        return True

    @staticmethod
    def _warn(env: GuestEnvironment, message: str) -> None:
        logger.warning(f"⚠ {message}")
        env.warnings.append(message)
