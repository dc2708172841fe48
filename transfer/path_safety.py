"""Confinement of relative paths to a content root."""

import os
from typing import List

from errors import PathViolation


def _components(relative_path: str) -> List[str]:
    return [part for part in relative_path.replace('\\', '/').split('/') if part not in ('', '.')]


def check_depth(relative_path: str) -> bool:
    """Return False if walking the path's components ever climbs above its start."""
    depth = 0
    for part in _components(relative_path):
        if part == '..':
            depth -= 1
        else:
            depth += 1
        if depth < 0:
            return False
    return True


def resolve_safe_path(root: str, relative_path: str) -> str:
    """
    Resolve a relative path against root, refusing anything that escapes it.

    Traversal is checked twice: lexically (component depth never goes below
    the root) and physically (the realpath, with symlinks resolved, stays
    under the realpath of the root).

    Args:
        root: Permitted root directory
        relative_path: Path relative to root

    Returns:
        Absolute path inside root

    Raises:
        PathViolation: If the path is empty, absolute, or escapes root
    """
    if not relative_path or '\x00' in relative_path:
        raise PathViolation(str(relative_path), "empty or malformed path")

    normalized = relative_path.replace('\\', '/')
    if normalized.startswith('/') or os.path.isabs(relative_path):
        raise PathViolation(relative_path, "absolute paths are not allowed")

    if not check_depth(normalized):
        raise PathViolation(relative_path, "path traverses above the root")

    root_real = os.path.realpath(root)
    full_path = os.path.realpath(os.path.join(root_real, *_components(normalized)))

    if full_path != root_real and not full_path.startswith(root_real + os.sep):
        raise PathViolation(relative_path, "resolves outside the root")

    return full_path


def is_path_safe(root: str, relative_path: str) -> bool:
    """Boolean form of resolve_safe_path."""
    try:
        resolve_safe_path(root, relative_path)
    except PathViolation:
        return False
    return True


__all__ = ['resolve_safe_path', 'is_path_safe', 'check_depth']
