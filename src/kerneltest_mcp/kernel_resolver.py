"""
Resolve a kernel version request to an installed, bootable kernel release.
"""
import logging
import os
import platform
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .config import DEFAULT_BOOT_DIR, DEFAULT_MODULES_DIR, ArchInfo, host_arch, normalize_arch
from .errors import KernelArtifactMissingError, KernelNotFoundError

logger = logging.getLogger(__name__)

KERNEL_IMAGE_PREFIX = "vmlinuz-"
INITRD_PREFIX = "initrd.img-"


@dataclass(frozen=True)
class KernelSpec:
    """A requested kernel: version token plus target architecture.

    A token starting with "v" (e.g. "v6.12") is symbolic and selects the
    latest installed build of that version; anything else is taken as a
    literal release name (e.g. "6.12.3-061203-generic").
    """

    version_token: str
    architecture: str = ""

    @property
    def is_symbolic(self) -> bool:
        return self.version_token.startswith("v")

    @property
    def version(self) -> str:
        """Version portion of a symbolic token (leading "v" stripped)."""
        return self.version_token[1:] if self.is_symbolic else self.version_token

    @property
    def arch(self) -> ArchInfo:
        return normalize_arch(self.architecture) if self.architecture else host_arch()

    @classmethod
    def host_default(cls) -> "KernelSpec":
        """Spec for the running host kernel on the host architecture."""
        return cls(version_token=platform.release(), architecture=platform.machine())


@dataclass(frozen=True)
class ResolvedKernel:
    """A concrete installed kernel; release is the join key for image and modules."""

    release: str
    image_path: Path
    modules_path: Path
    arch: ArchInfo
    # Informational only; vng has no initrd option and boots without one
    initrd_path: Optional[Path] = None

    def verify(self) -> None:
        """Check that the image and module tree exist and are readable.

        Raises:
            KernelArtifactMissingError: If either artifact is missing or unreadable
        """
        if not self.image_path.is_file():
            raise KernelArtifactMissingError(f"Kernel image not found at {self.image_path}")
        if not os.access(self.image_path, os.R_OK):
            raise KernelArtifactMissingError(f"Kernel image not readable: {self.image_path}")
        if not self.modules_path.is_dir():
            raise KernelArtifactMissingError(
                f"Kernel modules not found at {self.modules_path} (release {self.release})"
            )
        if not os.access(self.modules_path, os.R_OK | os.X_OK):
            raise KernelArtifactMissingError(f"Kernel modules not readable: {self.modules_path}")


def version_sort_key(release: str) -> Tuple[Tuple[int, Union[int, str]], ...]:
    """Sort key ordering release strings by version precedence (like `sort -V`).

    Digit runs compare numerically and everything else lexically, so
    "6.12.10" orders after "6.12.9".
    """
    key = []
    for chunk in re.findall(r"\d+|\D+", release):
        if chunk.isdigit():
            key.append((1, int(chunk)))
        else:
            key.append((0, chunk))
    return tuple(key)


class KernelResolver:
    """Maps kernel version requests to installed kernels."""

    def __init__(
        self,
        boot_dir: Optional[Path] = None,
        modules_dir: Optional[Path] = None,
    ):
        """Initialize kernel resolver.

        Args:
            boot_dir: Directory holding vmlinuz-<release> images (default: /boot)
            modules_dir: Directory holding <release> module trees (default: /lib/modules)
        """
        self.boot_dir = Path(boot_dir) if boot_dir else DEFAULT_BOOT_DIR
        self.modules_dir = Path(modules_dir) if modules_dir else DEFAULT_MODULES_DIR

    def installed_releases(self) -> List[str]:
        """List releases that have a kernel image in the boot directory."""
        if not self.boot_dir.is_dir():
            return []
        return [
            image.name[len(KERNEL_IMAGE_PREFIX):]
            for image in self.boot_dir.glob(f"{KERNEL_IMAGE_PREFIX}*")
            if image.name != KERNEL_IMAGE_PREFIX
        ]

    def select_release(self, spec: KernelSpec) -> str:
        """Pick the release a spec refers to, without checking artifacts.

        Raises:
            KernelNotFoundError: If a symbolic spec matches no installed release
        """
        if not spec.is_symbolic:
            return spec.version_token

        candidates = [r for r in self.installed_releases() if spec.version in r]
        if not candidates:
            installed = ", ".join(sorted(self.installed_releases(), key=version_sort_key))
            raise KernelNotFoundError(
                f"Could not find installed kernel for version {spec.version_token} "
                f"in {self.boot_dir} (installed: {installed or 'none'})"
            )

        candidates.sort(key=version_sort_key)
        if len(candidates) > 1:
            logger.info(f"  {len(candidates)} releases match {spec.version_token}: {candidates}")
        return candidates[-1]

    def resolve(self, spec: KernelSpec) -> ResolvedKernel:
        """Resolve a spec to a verified installed kernel.

        Args:
            spec: Requested kernel

        Returns:
            ResolvedKernel whose image and module tree both exist

        Raises:
            KernelNotFoundError: No installed kernel matches a symbolic spec
            KernelArtifactMissingError: Image or modules for the release are absent
        """
        release = self.select_release(spec)
        logger.info(f"Selected kernel release: {release}")

        initrd = self.boot_dir / f"{INITRD_PREFIX}{release}"
        kernel = ResolvedKernel(
            release=release,
            image_path=self.boot_dir / f"{KERNEL_IMAGE_PREFIX}{release}",
            modules_path=self.modules_dir / release,
            arch=spec.arch,
            initrd_path=initrd if initrd.exists() else None,
        )
        kernel.verify()
        logger.info(f"✓ Kernel image: {kernel.image_path}")
        logger.info(f"✓ Kernel modules: {kernel.modules_path}")
        return kernel
