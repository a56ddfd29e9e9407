import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Iterable, Tuple

import aiofiles
from uvicorn.config import LOGGING_CONFIG

from .allocator import Allocation, ReconcileResult, Slot, allocate_new, generate_slots, reconcile

logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger("uvicorn.error")

APP_NAME = "subid-ldap"
SUBID_MODE = 0o644
INTEGER_RE = re.compile(r"[+-]?[0-9]+")


def subid_header(start: int, id_range: int) -> str:
    return f"# Managed by {APP_NAME}: start={start} range={id_range}"


def parse_subids(lines: Iterable[str]) -> Tuple[Allocation, int]:
    """Parse owner:id:count rows, returning the allocation and the number of rejected rows."""
    entries = {}
    skipped = 0
    for line in lines:
        if line.startswith("#"):
            continue
        items = line.split(":")
        if len(items) != 3:
            if line:
                logger.debug(f"Skipping line that does not contain 3 items: {line!r}")
                skipped += 1
            continue
        if not INTEGER_RE.fullmatch(items[1]):
            logger.error(f"Unable to parse ID integer in line {line!r}")
            skipped += 1
            continue
        if not INTEGER_RE.fullmatch(items[2]):
            logger.error(f"Unable to parse count integer in line {line!r}")
            skipped += 1
            continue
        id = int(items[1])
        entries[id] = Slot(id=id, count=int(items[2]), owner=items[0])
    return entries, skipped


def render_subids(allocation: Allocation, header: str) -> str:
    lines = [header]
    for id in sorted(allocation):
        slot = allocation[id]
        if slot.free:
            continue
        lines.append(f"{slot.owner}:{slot.id}:{slot.count}")
    return "\n".join(lines)


class SubordinateManager:
    def __init__(
        self,
        subuid_path: str = "/etc/subuid",
        subgid_path: str = "/etc/subgid",
        start: int = 65537,
        id_range: int = 65536,
    ):
        self.subuid_path = Path(subuid_path)
        self.subgid_path = Path(subgid_path)
        self.start = start
        self.id_range = id_range
        self._lock = asyncio.Lock()

    @property
    def header(self) -> str:
        return subid_header(self.start, self.id_range)

    async def is_managed(self, path: Path = None) -> bool:
        """
        Check whether a subid file carries our header.

        A missing file counts as managed since there is nothing to preserve.
        """
        path = Path(path or self.subuid_path)
        try:
            async with aiofiles.open(path, mode="rb") as f:
                first_line = await f.readline()
        except FileNotFoundError:
            return True
        first_line = first_line.rstrip(b"\n").decode(errors="replace")
        logger.debug(f"Check if line is managed line={first_line!r} header={self.header!r}")
        return first_line.startswith("#") and self.header in first_line

    async def load(self, path: Path = None) -> Tuple[Allocation, int]:
        path = Path(path or self.subuid_path)
        logger.debug(f"Read subid file {path}")
        try:
            async with aiofiles.open(path, mode="rb") as f:
                content = await f.read()
        except FileNotFoundError:
            return {}, 0
        lines = []
        undecodable = 0
        for raw in content.split(b"\n"):
            try:
                lines.append(raw.decode())
            except UnicodeDecodeError:
                logger.error(f"Skipping line that is not valid UTF-8: {raw!r}")
                undecodable += 1
        subids, skipped = parse_subids(lines)
        return subids, skipped + undecodable

    async def save(self, allocation: Allocation, path: Path = None) -> None:
        path = Path(path or self.subuid_path)
        logger.debug(f"Update subid file {path}")
        await self._write(path, render_subids(allocation, self.header))

    async def mirror(self) -> None:
        """Copy the subuid file byte for byte onto the subgid file."""
        async with aiofiles.open(self.subuid_path, mode="rb") as f:
            content = await f.read()
        await self._write(self.subgid_path, content)

    async def sync(self, users: Iterable[str]) -> ReconcileResult:
        users = list(users)
        async with self._lock:
            if await self.is_managed():
                existing, skipped = await self.load()
                logger.debug(f"Existing subuids loaded count={len(existing)}")
                result = reconcile(users, existing, generate_slots(self.start, self.id_range))
                result.skipped = skipped
            else:
                logger.info(f"{self.subuid_path} is not managed, replacing its content")
                result = allocate_new(users, self.start, self.id_range)
            await self.save(result.allocation)
            await self.mirror()
        return result

    async def _write(self, path: Path, content) -> None:
        created = not path.exists()
        mode = "wb" if isinstance(content, bytes) else "w"
        async with aiofiles.open(path, mode=mode) as f:
            await f.write(content)
        if created:
            os.chmod(path, SUBID_MODE)
