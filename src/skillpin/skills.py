from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from .errors import AmbiguousUnitError, FrontmatterError, UnitNotFoundError
from .fsops import normalize_subdir
from .git import GitBackend

logger = logging.getLogger(__name__)

MARKER_FILE = "SKILL.md"
VCS_DIRS = frozenset({".git", ".hg", ".svn"})

_FRONTMATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


@dataclass(frozen=True)
class SkillMeta:
    name: str
    description: str
    license: str | None = None
    allowed_tools: tuple[str, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class SkillDescriptor:
    name: str
    description: str
    path: str  # directory inside the repository, "." for the root


def _parse_kv_lines(block: str) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for line in block.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or ":" not in stripped:
            continue
        key, value = stripped.split(":", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        data[key.strip()] = value
    return data


def _required_str(data: dict[str, Any], key: str, *, source: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise FrontmatterError(f"{source}: front matter must define a non-empty string {key!r}.")
    return value.strip()


def _parse_allowed_tools(value: Any, *, source: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(t for t in re.split(r"[,\s]+", value) if t)
    if isinstance(value, list) and all(isinstance(t, str) for t in value):
        return tuple(t.strip() for t in value if t.strip())
    raise FrontmatterError(f"{source}: 'allowed-tools' must be a string or a list of strings.")


def _parse_metadata(value: Any, *, source: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise FrontmatterError(f"{source}: 'metadata' must be a mapping.")
    return {str(k): str(v) for k, v in value.items()}


def parse_frontmatter(text: str, *, source: str = MARKER_FILE) -> SkillMeta:
    """
    Parse the leading `---` delimited block of a marker file.

    YAML is tried first; a block YAML rejects (unquoted colons in a
    description are the usual culprit) falls back to plain `key: value`
    lines.
    """
    m = _FRONTMATTER_RE.match(text.lstrip("\ufeff"))
    if not m:
        raise FrontmatterError(f"{source}: missing front matter block delimited by '---'.")
    block = m.group(1)

    try:
        loaded = yaml.safe_load(block)
    except yaml.YAMLError:
        loaded = _parse_kv_lines(block)
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise FrontmatterError(f"{source}: front matter must be a mapping of keys to values.")

    license_value = loaded.get("license")
    if license_value is not None and not isinstance(license_value, str):
        raise FrontmatterError(f"{source}: 'license' must be a string.")

    return SkillMeta(
        name=_required_str(loaded, "name", source=source),
        description=_required_str(loaded, "description", source=source),
        license=license_value,
        allowed_tools=_parse_allowed_tools(loaded.get("allowed-tools"), source=source),
        metadata=_parse_metadata(loaded.get("metadata"), source=source),
    )


def parse_frontmatter_file(path: Path) -> SkillMeta:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise FrontmatterError(f"{path}: {MARKER_FILE} not found.") from e
    except (OSError, UnicodeDecodeError) as e:
        raise FrontmatterError(f"{path}: unable to read: {e}") from e
    return parse_frontmatter(text, source=str(path))


def read_installed_meta(skill_dir: Path) -> SkillMeta | None:
    try:
        return parse_frontmatter_file(skill_dir / MARKER_FILE)
    except FrontmatterError:
        return None


def _is_marker(path: str) -> bool:
    parts = PurePosixPath(path).parts
    if not parts or parts[-1] != MARKER_FILE:
        return False
    return not any(p in VCS_DIRS for p in parts[:-1])


def discover_skills(git: GitBackend, repo_dir: Path, commit: str) -> list[SkillDescriptor]:
    """Every valid marker file in the tree at `commit`, sorted by path."""
    found: list[SkillDescriptor] = []
    for path in sorted(p for p in git.list_files(repo_dir, commit) if _is_marker(p)):
        data = git.read_file(repo_dir, commit, path)
        if data is None:
            continue
        try:
            meta = parse_frontmatter(data.decode("utf-8"), source=path)
        except (FrontmatterError, UnicodeDecodeError) as e:
            logger.warning("skipping %s at %s: %s", path, commit[:12], e)
            continue
        parent = str(PurePosixPath(path).parent)
        found.append(SkillDescriptor(name=meta.name, description=meta.description, path=normalize_subdir(parent)))
    return found


def select_skill(
    descriptors: list[SkillDescriptor],
    name: str,
    *,
    path: str | None = None,
    repo_label: str,
) -> SkillDescriptor:
    if path is not None:
        wanted = normalize_subdir(path)
        at_path = [d for d in descriptors if d.path == wanted]
        if not at_path:
            raise UnitNotFoundError(f"No valid {MARKER_FILE} found at '{wanted}' in {repo_label}.")
        d = at_path[0]
        if d.name != name:
            raise UnitNotFoundError(
                f"The skill at '{wanted}' in {repo_label} is named '{d.name}', not '{name}'. "
                f"Re-run with name '{d.name}' or a different --path."
            )
        return d

    matches = [d for d in descriptors if d.name == name]
    if not matches:
        raise UnitNotFoundError(
            f"Skill '{name}' not found in {repo_label}. Run 'skillpin repo catalog {repo_label}' to list available skills."
        )
    if len(matches) > 1:
        candidates = tuple(d.path for d in matches)
        raise AmbiguousUnitError(
            f"Multiple skills named '{name}' found in {repo_label}. Re-run with --path one of: {', '.join(candidates)}",
            candidates=candidates,
        )
    return matches[0]
