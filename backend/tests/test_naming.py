"""Tests for collision-free name allocation."""
import pytest

from mediarelay.errors import DuplicateNameError, UploadFailure
from mediarelay.storage.naming import NameAllocator, candidate_name, split_name

from conftest import MemoryBackend


class TestSplitName:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("photo.jpg", ("photo", ".jpg")),
            ("archive.tar.gz", ("archive.tar", ".gz")),
            ("report", ("report", "")),
            (".env", (".env", "")),
        ],
    )
    def test_split(self, name, expected):
        assert split_name(name) == expected

    def test_candidates(self):
        assert candidate_name("photo.jpg", 0) == "photo.jpg"
        assert candidate_name("photo.jpg", 2) == "photo_2.jpg"
        assert candidate_name(".env", 1) == ".env_1"


async def _folder():
    backend = MemoryBackend()
    handle = await backend.ensure_path(("LINE-bot",))
    return backend, handle


class TestNameAllocator:
    @pytest.mark.asyncio
    async def test_unused_name_is_kept(self):
        backend, handle = await _folder()

        name, index = await NameAllocator().allocate(backend, handle, "photo.jpg")

        assert (name, index) == ("photo.jpg", 0)

    @pytest.mark.asyncio
    async def test_skips_existing_suffixes(self):
        backend, handle = await _folder()
        backend.files[handle.id].update({"photo.jpg": b"", "photo_1.jpg": b""})

        name, _ = await NameAllocator().allocate(backend, handle, "photo.jpg")

        assert name == "photo_2.jpg"

    @pytest.mark.asyncio
    async def test_name_without_extension(self):
        backend, handle = await _folder()
        backend.files[handle.id]["report"] = b""

        name, _ = await NameAllocator().allocate(backend, handle, "report")

        assert name == "report_1"

    @pytest.mark.asyncio
    async def test_probe_limit(self):
        backend, handle = await _folder()
        backend.files[handle.id].update({"a.txt": b"", "a_1.txt": b""})

        with pytest.raises(UploadFailure):
            await NameAllocator(max_probes=2).allocate(backend, handle, "a.txt")

    @pytest.mark.asyncio
    async def test_write_reprobes_after_duplicate(self, tmp_path):
        backend, handle = await _folder()
        source = tmp_path / "staged"
        source.write_bytes(b"data")
        real_write = backend.write
        calls = []

        async def racing_write(folder_handle, name, src):
            calls.append(name)
            if len(calls) == 1:
                # Another writer took the name between probe and write.
                backend.files[folder_handle.id][name] = b"theirs"
                raise DuplicateNameError(name, backend.name)
            return await real_write(folder_handle, name, src)

        backend.write = racing_write

        result = await NameAllocator().allocate_and_write(backend, handle, "photo.jpg", source)

        assert calls == ["photo.jpg", "photo_1.jpg"]
        assert result.name == "photo_1.jpg"
        assert backend.names_in(("LINE-bot",)) == ["photo.jpg", "photo_1.jpg"]
