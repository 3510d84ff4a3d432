"""Temp-directory lease opener.

The filesystem itself is host-supplied through :class:`FsHost`; this module
only turns "make a directory" and "remove it recursively" into a lease
opener whose release deletes the directory.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from macrofx.core.ports import Lease, LeaseScope, Releasable, TempDir


@runtime_checkable
class FsHost(Protocol):
    async def mkdtemp(self, prefix: str = "tmp-") -> str: ...

    async def rm(self, path: str, recursive: bool = False) -> None: ...


def temp_dir_opener(host: FsHost) -> Callable[..., Awaitable[Releasable[Lease[TempDir]]]]:
    """Build ``lease.temp_dir(prefix="tmp-")`` over ``host``."""

    async def acquire(prefix: str = "tmp-") -> Releasable[Lease[TempDir]]:
        path = await host.mkdtemp(prefix)

        async def release() -> None:
            await host.rm(path, recursive=True)

        return Releasable(value=Lease(TempDir(path), LeaseScope("temp_dir")), release=release)

    return acquire


__all__ = ["FsHost", "temp_dir_opener"]
