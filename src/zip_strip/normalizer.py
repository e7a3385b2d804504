"""Canonicalizes a whole ZIP archive in place."""

from __future__ import annotations

import logging
import stat
from dataclasses import dataclass, field
from functools import cmp_to_key
from pathlib import Path
from typing import Callable, List, Optional, Union

from .archive import ArchiveMember, ZipArchive, unix_to_dos_date_time
from .config import NormalizerConfig
from .extra_fields import HeaderContext, normalize_extra_fields

logger = logging.getLogger(__name__)

CANONICAL_PERMISSIONS = 0o644

FilenameCmp = Callable[[str, str], int]
MemberNormalizer = Callable[[ArchiveMember], None]


@dataclass
class NormalizationResult:
    """Outcome of normalizing one archive."""

    path: Path
    members: List[str] = field(default_factory=list)
    """Member names in the order they were written."""

    modified: List[str] = field(default_factory=list)
    """Members whose content was replaced by a member normalizer."""


def canonical_unix_mode(is_dir: bool) -> int:
    """Returns rw-r--r-- permissions with a regular-file or directory type."""
    file_type = stat.S_IFDIR if is_dir else stat.S_IFREG
    return file_type | CANONICAL_PERMISSIONS


def normalize_member_metadata(member: ArchiveMember, canonical_time: int) -> None:
    """Rewrites the timestamp, permissions and extra fields of one member."""
    member.date_time = unix_to_dos_date_time(canonical_time)
    if member.is_unix:
        member.unix_mode = canonical_unix_mode(member.is_dir)
    member.central_extra = normalize_extra_fields(
        member.central_extra, HeaderContext.CENTRAL, canonical_time
    )
    member.local_extra = normalize_extra_fields(
        member.local_extra, HeaderContext.LOCAL, canonical_time
    )


def _sorted_names(archive: ZipArchive, filename_cmp: Optional[FilenameCmp]) -> List[str]:
    names = archive.member_names()
    if filename_cmp is not None:
        return sorted(names, key=cmp_to_key(filename_cmp))
    # Names as stored, so legacy (cp437) names sort by their bytes too.
    return sorted(names, key=archive.raw_filename)


def normalize_archive(
    path: Union[str, Path],
    config: Optional[NormalizerConfig] = None,
    filename_cmp: Optional[FilenameCmp] = None,
    member_normalizer: Optional[MemberNormalizer] = None,
) -> NormalizationResult:
    """
    Rewrites the ZIP archive at ``path`` into its canonical form.

    This method:
    1. Sorts member names (byte-wise ascending unless ``filename_cmp`` is given).
    2. Runs ``member_normalizer`` on each member, if given.
    3. Sets every timestamp to the canonical time and Unix permissions to 0644.
    4. Canonicalizes the central and local extra fields.
    5. Writes the members, in sorted order, over the original archive.

    Nothing is written unless every member was processed; any error leaves
    the original archive untouched.
    """
    config = config or NormalizerConfig()
    canonical_time = config.timestamp
    result = NormalizationResult(path=Path(path))

    with ZipArchive(path) as archive:
        members = []
        for name in _sorted_names(archive, filename_cmp):
            member = archive.member(name)
            if member_normalizer is not None:
                member_normalizer(member)
            normalize_member_metadata(member, canonical_time)
            members.append(member)

            result.members.append(name)
            if member.modified:
                result.modified.append(name)
            logger.debug("normalized member %s", name)

        archive.commit(members)

    return result
