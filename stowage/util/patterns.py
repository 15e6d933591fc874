"""Glob matching, path listing and template rendering helpers."""

import fnmatch
import os
import re
import typing as t
from pathlib import Path

from ..errors import ConfigurationError

EMPTY_TASK = "<empty>"

_TEMPLATE_RE = re.compile(r"\{([^{}]*)\}")


def match_patterns(value: str, patterns: t.Sequence[str]) -> bool:
    """Match ``value`` against glob patterns where ``!pattern`` excludes.

    A value matches when it is not excluded and it matches at least one
    positive pattern (or no positive pattern is given).
    """
    include = [p for p in patterns if not p.startswith("!")]
    exclude = [p[1:] for p in patterns if p.startswith("!")]

    if any(fnmatch.fnmatchcase(value, p) for p in exclude):
        return False
    if not include:
        return True
    return any(fnmatch.fnmatchcase(value, p) for p in include)


def create_pattern_filter(
    patterns: t.Optional[t.Sequence[str]],
) -> t.Callable[[str], bool]:
    """Build a predicate over names; no patterns matches everything."""
    if not patterns:
        return lambda value: True
    patterns = list(patterns)
    return lambda value: match_patterns(value, patterns)


def create_task_filter(
    patterns: t.Optional[t.Sequence[str]],
) -> t.Callable[[t.Optional[str]], bool]:
    """Build a predicate over task names where ``<empty>`` stands for no task."""
    name_filter = create_pattern_filter(patterns)
    return lambda value: name_filter(value or EMPTY_TASK)


def match_path(
    relative_path: str,
    include: t.Sequence[str],
    exclude: t.Sequence[str] = (),
) -> bool:
    """Check a POSIX relative path against include and exclude globs."""
    if any(fnmatch.fnmatchcase(relative_path, p) for p in exclude):
        return False
    return any(fnmatch.fnmatchcase(relative_path, p) for p in include)


def list_matched_paths(
    root: Path,
    include: t.Optional[t.Sequence[str]] = None,
    exclude: t.Sequence[str] = (),
    skip_dirs: t.Sequence[str] = (),
) -> t.List[str]:
    """List relative POSIX paths below ``root`` matching the given globs.

    Directories are listed too so that empty ones survive a round trip.
    An excluded directory is not descended into. Results are sorted.
    """
    include = list(include or ["**"])
    exclude = list(exclude)
    matched: t.List[str] = []

    for current, dirs, files in os.walk(root):
        rel_dir = Path(current).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else f"{rel_dir}/"

        kept_dirs = []
        for name in sorted(dirs):
            rel = prefix + name
            if name in skip_dirs or any(fnmatch.fnmatchcase(rel, p) for p in exclude):
                continue
            kept_dirs.append(name)
            if match_path(rel, include):
                matched.append(rel)
        dirs[:] = kept_dirs

        for name in sorted(files):
            rel = prefix + name
            if match_path(rel, include, exclude):
                matched.append(rel)

    return sorted(matched)


def static_prefix(pattern: str) -> str:
    """Return the leading path components of a glob that hold no wildcard."""
    parts = []
    for part in pattern.split("/"):
        if any(c in part for c in "*?["):
            break
        parts.append(part)
    return "/".join(parts)


def render(template: str, variables: t.Mapping[str, t.Any]) -> str:
    """Render ``{name}`` placeholders.

    ``{}`` renders a literal ``{`` and ``{/}`` a literal ``}``.

    Raises:
        ConfigurationError: If a placeholder names an unknown variable
    """
    def replace(match: "re.Match[str]") -> str:
        name = match.group(1).strip()
        if name == "":
            return "{"
        if name == "/":
            return "}"
        if name not in variables or variables[name] is None:
            raise ConfigurationError(f"Variable is not defined: {name}")
        return str(variables[name])

    return _TEMPLATE_RE.sub(replace, template)
