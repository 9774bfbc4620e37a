from __future__ import annotations

import fnmatch
import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, List, Optional


class PathNotAllowed(Exception):
    """Raised when an input path is outside the configured allowed roots."""


def is_ignored(rel_path: str, ignore_patterns: Iterable[str]) -> bool:
    basename = os.path.basename(rel_path)
    for pat in ignore_patterns:
        if fnmatch.fnmatch(rel_path, pat) or fnmatch.fnmatch(basename, pat):
            return True
        # fnmatch has no "any depth" notion for **; strip the prefix so that
        # **/*.min.js matches files sitting directly at the root.
        stripped = pat
        while stripped.startswith("**/"):
            stripped = stripped[3:]
        if stripped != pat and (
            fnmatch.fnmatch(rel_path, stripped) or fnmatch.fnmatch(basename, stripped)
        ):
            return True
    return False


class PathContext:
    """Resolves SourceFile paths against a repository root.

    The first allowed root is the repository root; SourceFile identity is the
    path relative to it, normalized to forward slashes.
    """

    def __init__(self, allowed_roots: Iterable[str]) -> None:
        roots = [self._normalize_root(p) for p in allowed_roots]
        self._allowed_roots = [r for r in roots if r]

    @property
    def allowed_roots(self) -> List[str]:
        return list(self._allowed_roots)

    @property
    def root(self) -> str:
        if not self._allowed_roots:
            raise PathNotAllowed("No allowed_roots configured.")
        return self._allowed_roots[0]

    def _normalize_root(self, root: str) -> Optional[str]:
        if not root:
            return None
        return os.path.realpath(os.path.abspath(root))

    def _normalize_case(self, path: str) -> str:
        if os.name == "nt":
            return os.path.normcase(path)
        return path

    def _absolute(self, path: str | Path) -> str:
        raw = str(path)
        if not os.path.isabs(raw):
            raw = os.path.join(self.root, raw)
        return os.path.abspath(raw)

    def _containing_root(self, path: str) -> Optional[str]:
        norm_ap = self._normalize_case(path)
        best: Optional[str] = None
        for root in self._allowed_roots:
            norm_root = self._normalize_case(root)
            try:
                common = os.path.commonpath([norm_ap, norm_root])
            except ValueError:
                continue
            if common == norm_root and (best is None or len(root) > len(best)):
                best = root
        return best

    def ensure_allowed(self, path: str | Path) -> str:
        if not self._allowed_roots:
            raise PathNotAllowed("No allowed_roots configured.")
        ap = os.path.realpath(self._absolute(path))
        if self._containing_root(ap) is None:
            raise PathNotAllowed(
                f"Path '{ap}' is outside allowed_roots. Allowed roots: {self._allowed_roots}"
            )
        return ap

    def resolve_path(self, path: str | Path) -> Path:
        return Path(self.ensure_allowed(path))

    def relative_path(self, path: str | Path) -> str:
        """Normalized SourceFile identity for *path*.

        Relative inputs are taken relative to the repository root. Only the
        parent directory is resolved, so a removed file still maps to the
        identity it was indexed under.
        """
        ap = os.path.normpath(self._absolute(path))
        ap = os.path.join(os.path.realpath(os.path.dirname(ap)), os.path.basename(ap))
        root = self.root
        try:
            rel = os.path.relpath(ap, start=root)
        except ValueError as exc:
            raise PathNotAllowed(f"Path '{ap}' is outside root '{root}'") from exc
        if rel == os.curdir or rel.startswith(os.pardir + os.sep) or rel == os.pardir:
            raise PathNotAllowed(f"Path '{ap}' is outside root '{root}'")
        return PurePosixPath(*Path(rel).parts).as_posix()

    def read_bytes(self, path: str | Path, *, max_bytes: int) -> bytes:
        """Read a file without following a symlink on its final component."""
        resolved = self.ensure_allowed(path)
        flags = os.O_RDONLY
        if hasattr(os, "O_NOFOLLOW"):
            flags |= os.O_NOFOLLOW
        if hasattr(os, "O_CLOEXEC"):
            flags |= os.O_CLOEXEC
        if hasattr(os, "O_BINARY"):
            flags |= os.O_BINARY
        fd = os.open(resolved, flags)
        try:
            size = os.fstat(fd).st_size
            if size > max_bytes:
                raise ValueError(f"File too large: {path} ({size} bytes)")
            with os.fdopen(fd, "rb", closefd=False) as handle:
                return handle.read()
        finally:
            os.close(fd)

    def iter_files(self, root: str | Path, ignore_patterns: Iterable[str] = ()) -> Iterator[Path]:
        patterns = list(ignore_patterns)
        resolved_root = self.resolve_path(root)
        stack = [resolved_root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as entries:
                    for entry in entries:
                        candidate = Path(entry.path)
                        rel = candidate.relative_to(resolved_root).as_posix()
                        try:
                            if entry.is_symlink():
                                continue
                            if entry.is_dir(follow_symlinks=False):
                                if not is_ignored(rel + "/", patterns):
                                    stack.append(candidate)
                                continue
                            if entry.is_file(follow_symlinks=False) and not is_ignored(rel, patterns):
                                yield candidate
                        except OSError:
                            logging.debug("Skipping unreadable filesystem entry: %s", entry.path, exc_info=True)
            except OSError:
                logging.debug("Skipping unreadable directory during traversal: %s", current, exc_info=True)

    def exists(self, path: str | Path) -> bool:
        try:
            resolved = self.resolve_path(path)
        except PathNotAllowed:
            return False
        return resolved.exists()

    def makedirs(self, path: str | Path, *, exist_ok: bool = True) -> None:
        resolved = self.resolve_path(path)
        os.makedirs(resolved, exist_ok=exist_ok)

    def create_temp_file(self, *, dir_path: str | Path, suffix: str) -> str:
        resolved_dir = self.resolve_path(dir_path)
        fd, temp_path = tempfile.mkstemp(dir=resolved_dir, suffix=suffix)
        os.close(fd)
        try:
            os.chmod(temp_path, 0o600)
        except OSError:
            logging.debug("Failed to chmod temp file %s", temp_path, exc_info=True)
        return temp_path

    def replace(self, src: str | Path, dest: str | Path) -> None:
        os.replace(self.resolve_path(src), self.resolve_path(dest))

    def unlink(self, path: str | Path) -> None:
        self.resolve_path(path).unlink()
