"""Path normalization for image member paths."""

from __future__ import annotations

import posixpath

from .errors import PathError


def normalize_path(path: str) -> str:
    """Normalize a relative, slash-separated path.

    Args:
        path: Path as given by the user, e.g. "acme//user/./v1/user.proto"

    Returns:
        The normalized path, e.g. "acme/user/v1/user.proto"

    Raises:
        PathError: If the path is empty, absolute, or escapes its root
    """
    if not path:
        raise PathError("path is empty", path=path)
    if posixpath.isabs(path):
        raise PathError(f"{path} is an absolute path", path=path)
    normalized = posixpath.normpath(path)
    if normalized == ".." or normalized.startswith("../"):
        raise PathError(f"{path} is outside the context directory", path=path)
    return normalized


def is_normalized(path: str) -> bool:
    """Whether `path` is already a valid normalized relative path."""
    try:
        return normalize_path(path) == path
    except PathError:
        return False
