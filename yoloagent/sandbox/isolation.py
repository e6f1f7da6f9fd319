"""OS-level isolation of sandbox commands with bubblewrap."""

import logging
import shutil
from pathlib import Path
from typing import Optional

from yoloagent.constants import (
    BWRAP_BINARY,
    SANDBOX_GROUP,
    SANDBOX_PASSWD,
    SANDBOX_RESOLV_CONF,
    SANDBOX_ROOT_DIR,
    SANDBOX_ROOT_SUBDIRS,
    SANDBOX_WORKSPACE_MOUNT,
)

logger = logging.getLogger(__name__)


class OsIsolation:
    """Bootstraps a minimal root filesystem and wraps commands in bwrap.

    The root is a skeleton: /usr, /lib and /lib64 inside the namespace come
    from the sandbox root, never from the host, so binaries must be placed
    under ``<worktree>/.sandbox-root`` for commands to find them.
    """

    def __init__(self):
        self.sandbox_root: Optional[Path] = None
        self.workspace_path: Optional[Path] = None

    @property
    def active(self) -> bool:
        return self.sandbox_root is not None

    @staticmethod
    def is_available() -> bool:
        """Check whether the bwrap binary is on PATH."""
        return shutil.which(BWRAP_BINARY) is not None

    def initialize(self, worktree_path: Path) -> Path:
        """Create the sandbox root under the worktree.

        Args:
            worktree_path: Sandbox worktree directory

        Returns:
            Path to the created root

        Raises:
            OSError: If the directory tree or /etc files cannot be written
        """
        root = worktree_path / SANDBOX_ROOT_DIR

        for subdir in SANDBOX_ROOT_SUBDIRS:
            (root / subdir).mkdir(parents=True, exist_ok=True)

        (root / "etc" / "passwd").write_text(SANDBOX_PASSWD)
        (root / "etc" / "group").write_text(SANDBOX_GROUP)
        (root / "etc" / "resolv.conf").write_text(SANDBOX_RESOLV_CONF)

        # Keep the root out of the sandbox branch's commits
        (root / ".gitignore").write_text("*\n")

        self.sandbox_root = root
        self.workspace_path = worktree_path
        logger.info("Bootstrapped sandbox root at %s", root)
        return root

    def wrap(self, command: str, relative_cwd: str = ".") -> list[str]:
        """Build the bwrap argument vector for a shell command.

        Args:
            command: Command line for ``/bin/sh -c``
            relative_cwd: Working directory relative to the worktree

        Returns:
            Argument vector starting with the bwrap binary
        """
        if not self.active:
            raise RuntimeError("OS-level sandbox not active")

        root = str(self.sandbox_root)
        chdir = SANDBOX_WORKSPACE_MOUNT
        if relative_cwd and relative_cwd != ".":
            chdir = f"{SANDBOX_WORKSPACE_MOUNT}/{relative_cwd}"

        return [
            BWRAP_BINARY,
            # Every namespace except network (package installs need it)
            "--unshare-all",
            "--share-net",
            "--proc", "/proc",
            "--bind", root, "/",
            "--dev", "/dev",
            "--tmpfs", "/tmp",
            # System directories come from the sandbox root, read-only
            "--ro-bind", f"{root}/usr", "/usr",
            "--ro-bind", f"{root}/lib", "/lib",
            "--ro-bind", f"{root}/lib64", "/lib64",
            "--ro-bind-try", f"{root}/lib/x86_64-linux-gnu", "/lib/x86_64-linux-gnu",
            "--bind", str(self.workspace_path), SANDBOX_WORKSPACE_MOUNT,
            "--chdir", chdir,
            # No host home or ssh keys
            "--dir", "/home/sandbox",
            "--setenv", "HOME", "/home/sandbox",
            "--setenv", "PATH", "/usr/bin:/bin",
            "--setenv", "SANDBOX", "1",
            "--die-with-parent",
            "/bin/sh", "-c", command,
        ]

    def cleanup(self) -> None:
        """Remove the sandbox root. Raises OSError if removal fails."""
        root = self.sandbox_root
        self.sandbox_root = None
        self.workspace_path = None
        if root is not None and root.exists():
            shutil.rmtree(root)
