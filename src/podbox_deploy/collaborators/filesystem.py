"""
Filesystem operations for backups, updates and rollback.

The Filesystem class groups the tree operations the deployment components
need so that tests can subclass it to inject failures:
- copy_tree: recursive copy preserving modes, timestamps, symlinks and,
  when running as root, ownership (the equivalent of ``cp -a``)
- move_tree / remove_tree: promote or discard a whole tree
- apply_permissions: owner/group plus separate directory and file modes
- is_mount: external volume detection

Every failure is raised as CollaboratorError with the offending path in
``details``; callers translate it into their phase error.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from podbox_deploy.errors import CollaboratorError
from podbox_deploy.logging import get_logger

logger = get_logger(__name__)


def _is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


class Filesystem:
    """Local filesystem tree operations."""

    def exists(self, path: Path) -> bool:
        """Return True if ``path`` exists (dangling symlinks count)."""
        return os.path.lexists(path)

    def is_dir(self, path: Path) -> bool:
        """Return True if ``path`` is a directory."""
        return path.is_dir()

    def is_mount(self, path: Path) -> bool:
        """Return True if ``path`` is a mount point."""
        return os.path.ismount(path)

    def copy_tree(self, src: Path, dst: Path, *, merge: bool = False) -> None:
        """
        Recursively copy ``src`` to ``dst``.

        Args:
            src: Source directory.
            dst: Destination directory. Must not exist unless ``merge``.
            merge: Copy into an existing destination, overwriting files.

        Raises:
            CollaboratorError: If the source is missing or the copy fails.
        """
        if not src.is_dir():
            raise CollaboratorError(
                f"Source directory does not exist: {src}",
                details={"src": str(src), "dst": str(dst)},
            )

        try:
            shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=merge)
            if _is_root():
                self._copy_ownership(src, dst)
        except (OSError, shutil.Error) as e:
            raise CollaboratorError(
                f"Failed to copy {src} to {dst}: {e}",
                details={"src": str(src), "dst": str(dst), "error": str(e)},
            ) from e

        logger.debug("Copied tree", extra={"src": str(src), "dst": str(dst)})

    @staticmethod
    def _copy_ownership(src: Path, dst: Path) -> None:
        st = src.lstat()
        os.lchown(dst, st.st_uid, st.st_gid)
        for dirpath, dirnames, filenames in os.walk(src):
            rel = Path(dirpath).relative_to(src)
            for name in dirnames + filenames:
                st = (Path(dirpath) / name).lstat()
                os.lchown(dst / rel / name, st.st_uid, st.st_gid)

    def move_tree(self, src: Path, dst: Path) -> None:
        """
        Move ``src`` to ``dst``. The destination must not exist.

        Raises:
            CollaboratorError: If the source is missing, the destination
                exists, or the move fails.
        """
        if not self.exists(src):
            raise CollaboratorError(
                f"Source does not exist: {src}",
                details={"src": str(src), "dst": str(dst)},
            )
        if self.exists(dst):
            raise CollaboratorError(
                f"Destination already exists: {dst}",
                details={"src": str(src), "dst": str(dst)},
            )

        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src), str(dst))
        except OSError as e:
            raise CollaboratorError(
                f"Failed to move {src} to {dst}: {e}",
                details={"src": str(src), "dst": str(dst), "error": str(e)},
            ) from e

        logger.debug("Moved tree", extra={"src": str(src), "dst": str(dst)})

    def remove_tree(self, path: Path) -> bool:
        """
        Remove a directory tree (or a single file/symlink).

        Returns:
            True if something was removed, False if ``path`` did not exist.

        Raises:
            CollaboratorError: If the path exists but cannot be removed.
        """
        if not self.exists(path):
            return False

        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            raise CollaboratorError(
                f"Failed to remove {path}: {e}",
                details={"path": str(path), "error": str(e)},
            ) from e

        logger.debug("Removed tree", extra={"path": str(path)})
        return True

    def apply_permissions(
        self,
        root: Path,
        *,
        owner: str | None,
        group: str | None,
        dir_mode: int,
        file_mode: int,
    ) -> None:
        """
        Apply ownership and modes to every entry below ``root``.

        Symlinks are left untouched. Ownership is only changed when an
        owner or group is given.

        Raises:
            CollaboratorError: If any chown/chmod fails.
        """
        try:
            # os.walk does not descend into symlinked directories
            for dirpath, _dirnames, filenames in os.walk(root):
                current = Path(dirpath)
                self._apply(current, owner, group, dir_mode)
                for name in filenames:
                    path = current / name
                    if path.is_symlink():
                        continue
                    self._apply(path, owner, group, file_mode)
        except (OSError, LookupError) as e:
            raise CollaboratorError(
                f"Failed to apply permissions under {root}: {e}",
                details={"path": str(root), "error": str(e)},
            ) from e

        logger.debug(
            "Applied permissions",
            extra={
                "path": str(root),
                "owner": owner,
                "group": group,
                "dir_mode": oct(dir_mode),
                "file_mode": oct(file_mode),
            },
        )

    @staticmethod
    def _apply(path: Path, owner: str | None, group: str | None, mode: int) -> None:
        if owner is not None or group is not None:
            shutil.chown(path, user=owner, group=group)
        os.chmod(path, mode)
