from __future__ import annotations


class SkillpinError(RuntimeError):
    pass


class ConfigurationError(SkillpinError):
    pass


class RepoResolutionError(SkillpinError):
    pass


class GitError(RepoResolutionError):
    pass


class FrontmatterError(SkillpinError):
    pass


class UnitNotFoundError(SkillpinError):
    pass


class AmbiguousUnitError(SkillpinError):
    def __init__(self, message: str, *, candidates: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.candidates = candidates


class InstallConflictError(SkillpinError):
    pass


class ModifiedStateError(SkillpinError):
    pass


class MissingCacheError(SkillpinError):
    pass


class UnreachableCommitError(SkillpinError):
    pass


class LockfileCorruptionError(SkillpinError):
    pass


class PublishError(SkillpinError):
    pass
