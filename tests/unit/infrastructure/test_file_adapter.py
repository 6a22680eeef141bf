"""
Unit Tests for the Local File Adapter

All operations run against a real temporary workspace.
"""

import pytest

from autotask.core.domain.errors import TaskError
from autotask.core.interfaces.capabilities import SearchMatch
from autotask.infrastructure.adapters.file_adapter import LocalFileAdapter


@pytest.fixture
def adapter(tmp_path):
    return LocalFileAdapter(tmp_path, max_file_size=64)


@pytest.mark.asyncio
async def test_write_creates_parent_directories(adapter, tmp_path):
    written = await adapter.write(tmp_path / "docs" / "guide.md", "# Guide")

    assert written == 7
    assert (tmp_path / "docs" / "guide.md").read_text(encoding="utf-8") == "# Guide"


@pytest.mark.asyncio
async def test_append(adapter, tmp_path):
    target = tmp_path / "log.txt"
    await adapter.write(target, "one\n")
    await adapter.append(target, "two\n")

    assert await adapter.read(target) == "one\ntwo\n"


@pytest.mark.asyncio
async def test_read_missing_file(adapter, tmp_path):
    with pytest.raises(FileNotFoundError):
        await adapter.read(tmp_path / "missing.txt")


@pytest.mark.asyncio
async def test_read_directory(adapter, tmp_path):
    (tmp_path / "src").mkdir()

    with pytest.raises(IsADirectoryError):
        await adapter.read(tmp_path / "src")


@pytest.mark.asyncio
async def test_read_oversized_file(adapter, tmp_path):
    (tmp_path / "big.txt").write_text("x" * 65, encoding="utf-8")

    with pytest.raises(TaskError) as info:
        await adapter.read(tmp_path / "big.txt")

    assert info.value.code == "FILE_SIZE_EXCEEDED"


@pytest.mark.asyncio
async def test_create_refuses_existing_file(adapter, tmp_path):
    await adapter.create(tmp_path / "new.txt", "first")

    with pytest.raises(FileExistsError):
        await adapter.create(tmp_path / "new.txt", "second")
    assert (tmp_path / "new.txt").read_text(encoding="utf-8") == "first"


@pytest.mark.asyncio
async def test_delete(adapter, tmp_path):
    (tmp_path / "old.txt").write_text("bye", encoding="utf-8")
    (tmp_path / "keep").mkdir()

    await adapter.delete(tmp_path / "old.txt")

    assert not (tmp_path / "old.txt").exists()
    with pytest.raises(IsADirectoryError):
        await adapter.delete(tmp_path / "keep")


class TestSearch:
    @pytest.mark.asyncio
    async def test_glob_skips_vendor_directories(self, adapter, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("", encoding="utf-8")
        (tmp_path / "node_modules" / "lib").mkdir(parents=True)
        (tmp_path / "node_modules" / "lib" / "index.py").write_text("", encoding="utf-8")

        assert await adapter.search("**/*.py") == ["src/main.py"]

    @pytest.mark.asyncio
    async def test_max_results(self, adapter, tmp_path):
        for name in ("a.txt", "b.txt", "c.txt"):
            (tmp_path / name).write_text("", encoding="utf-8")

        assert await adapter.search("*.txt", max_results=2) == ["a.txt", "b.txt"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pattern", ["../*.txt", "/etc/*"])
    async def test_pattern_must_stay_in_workspace(self, adapter, pattern):
        with pytest.raises(TaskError) as info:
            await adapter.search(pattern)

        assert info.value.code == "INVALID_SEARCH_PATTERN"


class TestFindInFiles:
    @pytest.mark.asyncio
    async def test_case_insensitive_matches(self, adapter, tmp_path):
        (tmp_path / "app.py").write_text("def main():\n    # FIXME later\n", encoding="utf-8")

        matches = await adapter.find_in_files("fixme")

        assert matches == [SearchMatch(path="app.py", line=2, text="# FIXME later")]

    @pytest.mark.asyncio
    async def test_include_filter(self, adapter, tmp_path):
        (tmp_path / "a.py").write_text("token\n", encoding="utf-8")
        (tmp_path / "b.md").write_text("token\n", encoding="utf-8")

        matches = await adapter.find_in_files("token", include="*.md")

        assert [m.path for m in matches] == ["b.md"]

    @pytest.mark.asyncio
    async def test_binary_and_large_files_are_skipped(self, adapter, tmp_path):
        (tmp_path / "image.bin").write_bytes(b"\xff\xfe\x00token")
        (tmp_path / "huge.txt").write_text("token " * 20, encoding="utf-8")
        (tmp_path / "small.txt").write_text("token", encoding="utf-8")

        matches = await adapter.find_in_files("token")

        assert [m.path for m in matches] == ["small.txt"]
