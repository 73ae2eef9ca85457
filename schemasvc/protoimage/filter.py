"""
Bundle filtering.

Derives reduced Bundles from an existing one:
- restrict_to(): keep only the members named by a set of external paths
- strip_debug_info(): drop source code info from every member

Invariants:
    - The source Bundle is never modified
    - Selected members keep their content and relative order
    - Imports are not pulled in transitively; the result may have
      dangling dependencies
    - An empty path set returns the source Bundle itself
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Set

from .bundle import Bundle
from .errors import FilterError, FilterErrorKind, PathError
from .instrument import StageObserver, observe
from .paths import normalize_path

logger = logging.getLogger(__name__)

PathTranslator = Callable[[str], str]


@dataclass(frozen=True)
class MemberPathIndex:
    """Mapping from user-facing paths to member paths.

    Attributes:
        paths: External path -> member path, in first-seen order
    """

    paths: Dict[str, str]

    @classmethod
    def build(
        cls,
        external_paths: Iterable[str],
        translate: PathTranslator = normalize_path,
    ) -> MemberPathIndex:
        """Translate every external path.

        Raises:
            FilterError: With kind path_translation if any path cannot be
                translated
        """
        paths: Dict[str, str] = {}
        for external_path in external_paths:
            if external_path in paths:
                continue
            try:
                paths[external_path] = translate(external_path)
            except PathError as e:
                raise FilterError(
                    f"could not translate path {external_path!r}: {e.message}",
                    kind=FilterErrorKind.PATH_TRANSLATION,
                    path=external_path,
                ) from e
        return cls(paths)

    def member_paths(self) -> Set[str]:
        """The distinct member paths the external paths translate to."""
        return set(self.paths.values())


def restrict_to(
    bundle: Bundle,
    external_paths: Iterable[str],
    translate: PathTranslator = normalize_path,
    allow_missing: bool = False,
    observer: Optional[StageObserver] = None,
) -> Bundle:
    """Restrict a Bundle to the members named by `external_paths`.

    Args:
        bundle: Source bundle (not modified)
        external_paths: User-facing paths to keep
        translate: Maps an external path to a member path
        allow_missing: Skip paths with no matching member instead of failing
        observer: Optional stage observer

    Returns:
        `bundle` itself if no paths were given, otherwise a new Bundle

    Raises:
        FilterError: path_translation if a path cannot be translated,
            not_found if a path has no member and allow_missing is False

    Example:
        >>> restrict_to(bundle, ["acme/user/v1/user.proto"]).paths
        ('acme/user/v1/user.proto',)
    """
    external_paths = list(external_paths)
    if not external_paths:
        return bundle

    with observe(observer, "restrict_paths"):
        index = MemberPathIndex.build(external_paths, translate)
        selected = set()
        for external_path, member_path in index.paths.items():
            if member_path in bundle:
                selected.add(member_path)
            elif allow_missing:
                logger.debug(f"Skipping path {external_path} with no matching file")
            else:
                raise FilterError(
                    f"{external_path}: does not exist",
                    kind=FilterErrorKind.NOT_FOUND,
                    path=external_path,
                    identifier=member_path,
                )
        restricted = Bundle(
            tuple(member.copy() for member in bundle if member.path in selected)
        )
    logger.debug(f"Restricted bundle from {len(bundle)} to {len(restricted)} files")
    return restricted


def strip_debug_info(bundle: Bundle) -> Bundle:
    """Return a new Bundle with source code info removed from every member.

    Idempotent: stripping a stripped bundle yields an equal bundle.
    """
    return Bundle(tuple(member.without_debug_info() for member in bundle))
