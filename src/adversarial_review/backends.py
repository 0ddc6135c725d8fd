"""Filesystem backend for the fix agent.

The fix agent works on the project tree through a ``FilesystemBackend`` in
virtual mode, so every path it sees is rooted at the project directory. The
guard layer keeps the review state directory (iteration artifacts, snapshots,
risk policy) read-only for the agent: a fix must never rewrite the record of
the review that asked for it.

Composition order (innermost to outermost)::

    FilesystemBackend(project_dir, virtual_mode=True) -> ReviewStateGuardBackend
"""

from __future__ import annotations

import logging
from pathlib import Path

from deepagents.backends import FilesystemBackend
from deepagents.backends.protocol import (
    BackendProtocol,
    DeleteResult,
    EditResult,
    FileDownloadResponse,
    FileUploadResponse,
    GlobResult,
    GrepResult,
    LsResult,
    ReadResult,
    WriteResult,
)

logger = logging.getLogger(__name__)


class ReviewStateGuardBackend(BackendProtocol):
    """Blocks writes, edits, deletes and uploads under the review state directory; reads pass through."""

    _GUARDED_ERROR = "Cannot modify review state from a fix: {path}"

    def __init__(self, backend: BackendProtocol, state_root: Path) -> None:
        self._backend = backend
        self._state_root = state_root.resolve()

    def _resolve(self, file_path: str) -> Path:
        resolver = getattr(self._backend, "_resolve_path", None)
        if callable(resolver):
            return resolver(file_path)
        return Path(file_path)

    def _is_guarded(self, file_path: str) -> bool:
        try:
            resolved = self._resolve(file_path).resolve()
        except (OSError, ValueError):
            # Paths escaping the virtual root are rejected by the inner backend.
            return False
        return resolved == self._state_root or resolved.is_relative_to(self._state_root)

    def _blocked(self, file_path: str) -> str | None:
        if not self._is_guarded(file_path):
            return None
        msg = self._GUARDED_ERROR.format(path=file_path)
        logger.warning(msg)
        return msg

    def ls(self, path: str) -> LsResult:
        return self._backend.ls(path)

    def read(self, file_path: str, offset: int = 0, limit: int = 2000) -> ReadResult:
        return self._backend.read(file_path, offset=offset, limit=limit)

    def grep(
        self,
        pattern: str,
        path: str | None = None,
        glob: str | None = None,
        *,
        max_count: int | None = None,
    ) -> GrepResult:
        return self._backend.grep(pattern, path=path, glob=glob, max_count=max_count)

    def glob(self, pattern: str, path: str | None = None) -> GlobResult:
        return self._backend.glob(pattern, path=path)

    def write(self, file_path: str, content: str) -> WriteResult:
        blocked = self._blocked(file_path)
        if blocked is not None:
            return WriteResult(error=blocked)
        return self._backend.write(file_path, content)

    def edit(self, file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> EditResult:
        blocked = self._blocked(file_path)
        if blocked is not None:
            return EditResult(error=blocked)
        return self._backend.edit(file_path, old_string, new_string, replace_all=replace_all)

    def delete(self, file_path: str) -> DeleteResult:
        # Deleting an ancestor of the state directory would remove it too.
        try:
            resolved = self._resolve(file_path).resolve()
        except (OSError, ValueError):
            return self._backend.delete(file_path)
        if self._state_root.is_relative_to(resolved) or self._is_guarded(file_path):
            msg = self._GUARDED_ERROR.format(path=file_path)
            logger.warning(msg)
            return DeleteResult(error=msg)
        return self._backend.delete(file_path)

    def upload_files(self, files: list[tuple[str, bytes]]) -> list[FileUploadResponse]:
        """Upload files; the whole batch is rejected if any target is guarded."""
        blocked = [path for path, _ in files if self._is_guarded(path)]
        if blocked:
            return [FileUploadResponse(path=path, error=self._GUARDED_ERROR.format(path=path)) for path in blocked]
        return self._backend.upload_files(files)

    def download_files(self, paths: list[str]) -> list[FileDownloadResponse]:
        return self._backend.download_files(paths)


def build_fix_backend(project_dir: Path, state_dir: str = ".adversarial-review") -> BackendProtocol:
    """Construct the backend handed to the fix agent for ``project_dir``."""
    base = FilesystemBackend(root_dir=project_dir, virtual_mode=True)
    return ReviewStateGuardBackend(base, project_dir / state_dir)
