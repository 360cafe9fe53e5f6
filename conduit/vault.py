import asyncio
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from .errors import VaultError
from .schemas import WriteMode


class VaultWriter:
    """Writes notes under a single vault root directory."""

    def __init__(self, root: Optional[Union[str, Path]]):
        self.root = Path(root).expanduser() if root else None

    def resolve(self, path: str) -> Path:
        if self.root is None:
            raise VaultError("No vault configured")
        relative = PurePosixPath((path or "").replace("\\", "/").lstrip("/"))
        if not relative.parts or ".." in relative.parts:
            raise VaultError(f"Invalid vault path: {path!r}")
        return self.root.joinpath(*relative.parts)

    def _write_sync(self, target: Path, content: str, mode: WriteMode) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        if mode == "append" and target.exists():
            existing = target.read_text(encoding="utf-8")
            separator = "" if not existing or existing.endswith("\n") else "\n"
            with target.open("a", encoding="utf-8") as fh:
                fh.write(separator + content)
        else:
            target.write_text(content, encoding="utf-8")

    async def write(self, path: str, content: str, mode: WriteMode = "overwrite") -> Path:
        target = self.resolve(path)
        try:
            await asyncio.to_thread(self._write_sync, target, content, mode)
        except OSError as exc:
            raise VaultError(f"Failed to write {path}: {exc}") from exc
        return target
