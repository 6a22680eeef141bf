"""
Local file system adapter.

Implements FileCapability with aiofiles. Paths arrive already resolved and
checked by the workspace policy; this adapter only performs the I/O.
"""

import asyncio
import errno
import os
from pathlib import Path

import aiofiles
import aiofiles.os
import structlog

from autotask.core.domain.errors import ErrorCategory, TaskError
from autotask.core.interfaces.capabilities import SearchMatch

SKIPPED_DIRECTORIES = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv"})


class LocalFileAdapter:
    """File operations inside one workspace root."""

    def __init__(self, root: Path | str, max_file_size: int = 10 * 1024 * 1024, encoding: str = "utf-8"):
        self.root = Path(root).expanduser().resolve()
        self.max_file_size = max_file_size
        self.encoding = encoding
        self.logger = structlog.get_logger().bind(component="file_adapter")

    async def read(self, path: Path) -> str:
        if not await aiofiles.os.path.exists(path):
            raise FileNotFoundError(errno.ENOENT, "File not found", str(path))
        if await aiofiles.os.path.isdir(path):
            raise IsADirectoryError(errno.EISDIR, "Path is a directory", str(path))

        size = (await aiofiles.os.stat(path)).st_size
        if size > self.max_file_size:
            raise TaskError.build(
                f"File too large: {size} bytes > {self.max_file_size} bytes",
                ErrorCategory.VALIDATION,
                code="FILE_SIZE_EXCEEDED",
                context={"path": str(path), "size": size},
            )

        async with aiofiles.open(path, "r", encoding=self.encoding) as f:
            return await f.read()

    async def _write(self, path: Path, content: str, mode: str) -> int:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, mode, encoding=self.encoding) as f:
            await f.write(content)
        self.logger.debug("file_written", path=str(path), mode=mode, characters=len(content))
        return len(content)

    async def write(self, path: Path, content: str) -> int:
        return await self._write(path, content, "w")

    async def append(self, path: Path, content: str) -> int:
        return await self._write(path, content, "a")

    async def create(self, path: Path, content: str = "") -> None:
        if await aiofiles.os.path.exists(path):
            raise FileExistsError(errno.EEXIST, "File already exists", str(path))
        await self._write(path, content, "x")

    async def delete(self, path: Path) -> None:
        if await aiofiles.os.path.isdir(path):
            raise IsADirectoryError(errno.EISDIR, "Refusing to delete a directory", str(path))
        await aiofiles.os.remove(path)

    def _walk(self):
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if d not in SKIPPED_DIRECTORIES]
            for filename in filenames:
                yield Path(dirpath) / filename

    def _glob(self, pattern: str, max_results: int) -> list[str]:
        found: list[str] = []
        for candidate in sorted(self.root.glob(pattern)):
            if not candidate.is_file():
                continue
            relative = candidate.relative_to(self.root)
            if SKIPPED_DIRECTORIES.intersection(relative.parts):
                continue
            found.append(relative.as_posix())
            if len(found) >= max_results:
                break
        return found

    async def search(self, pattern: str, max_results: int = 100) -> list[str]:
        """Workspace-relative files matching a glob pattern (``**`` allowed)."""
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise TaskError.build(
                f"Search pattern must be relative to the workspace: {pattern}",
                ErrorCategory.VALIDATION,
                code="INVALID_SEARCH_PATTERN",
            )
        return await asyncio.to_thread(self._glob, pattern, max_results)

    async def find_in_files(
        self, search_term: str, include: str | None = None, max_results: int = 100
    ) -> list[SearchMatch]:
        """Lines containing search_term (case-insensitive)."""
        needle = search_term.lower()
        if include:
            candidates = [self.root / p for p in await self.search(include, max_results=10_000)]
        else:
            candidates = await asyncio.to_thread(lambda: sorted(self._walk()))

        matches: list[SearchMatch] = []
        for path in candidates:
            try:
                if (await aiofiles.os.stat(path)).st_size > self.max_file_size:
                    continue
                async with aiofiles.open(path, "r", encoding=self.encoding) as f:
                    content = await f.read()
            except (UnicodeDecodeError, OSError):
                # Binary or unreadable files are not searchable.
                continue

            relative = path.relative_to(self.root).as_posix()
            for number, line in enumerate(content.splitlines(), start=1):
                if needle in line.lower():
                    matches.append(SearchMatch(path=relative, line=number, text=line.strip()[:200]))
                    if len(matches) >= max_results:
                        return matches
        return matches
