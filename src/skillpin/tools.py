from __future__ import annotations

import shutil
from dataclasses import dataclass


@dataclass(frozen=True)
class ToolStatus:
    """Whether an optional external program can be used, and why not when it can't."""

    name: str
    path: str | None = None
    reason: str | None = None

    @property
    def available(self) -> bool:
        return self.path is not None

    @classmethod
    def found(cls, name: str, path: str) -> "ToolStatus":
        return cls(name=name, path=path)

    @classmethod
    def unavailable(cls, name: str, reason: str) -> "ToolStatus":
        return cls(name=name, reason=reason)


def locate(name: str) -> ToolStatus:
    path = shutil.which(name)
    if path is None:
        return ToolStatus.unavailable(name, f"'{name}' not found on PATH")
    return ToolStatus.found(name, path)


@dataclass(frozen=True)
class Toolset:
    rsync: ToolStatus
    gh: ToolStatus

    @classmethod
    def detect(cls) -> "Toolset":
        return cls(rsync=locate("rsync"), gh=locate("gh"))
