from ._version import __version__
from .context import Context
from .errors import (
    AmbiguousUnitError,
    ConfigurationError,
    InstallConflictError,
    LockfileCorruptionError,
    MissingCacheError,
    ModifiedStateError,
    PublishError,
    RepoResolutionError,
    SkillpinError,
    UnitNotFoundError,
    UnreachableCommitError,
)
from .manager import SkillManager

__all__ = [
    "__version__",
    "AmbiguousUnitError",
    "ConfigurationError",
    "Context",
    "InstallConflictError",
    "LockfileCorruptionError",
    "MissingCacheError",
    "ModifiedStateError",
    "PublishError",
    "RepoResolutionError",
    "SkillManager",
    "SkillpinError",
    "UnitNotFoundError",
    "UnreachableCommitError",
]
