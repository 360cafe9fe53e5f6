import pytest

from conduit.errors import VaultError
from conduit.vault import VaultWriter


@pytest.mark.asyncio
async def test_overwrite_creates_parent_dirs(tmp_path):
    vault = VaultWriter(tmp_path)
    target = await vault.write("/daily/2026-03-04.md", "first")
    await vault.write("daily/2026-03-04.md", "second")
    assert target == tmp_path / "daily" / "2026-03-04.md"
    assert target.read_text() == "second"


@pytest.mark.asyncio
async def test_append_separates_with_newline(tmp_path):
    vault = VaultWriter(tmp_path)
    await vault.write("log.md", "one", "append")
    await vault.write("log.md", "two", "append")
    (tmp_path / "log.md").write_text((tmp_path / "log.md").read_text() + "\n")
    await vault.write("log.md", "three", "append")
    assert (tmp_path / "log.md").read_text() == "one\ntwo\nthree"


@pytest.mark.asyncio
async def test_paths_cannot_escape_root(tmp_path):
    vault = VaultWriter(tmp_path / "vault")
    for path in ("../outside.md", "notes/../../x.md", "", "/"):
        with pytest.raises(VaultError):
            await vault.write(path, "x")
    assert not (tmp_path / "outside.md").exists()


@pytest.mark.asyncio
async def test_missing_root_is_an_error():
    with pytest.raises(VaultError, match="No vault configured"):
        await VaultWriter(None).write("a.md", "x")
