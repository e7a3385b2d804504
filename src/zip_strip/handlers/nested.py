"""Normalization of ZIP archives stored as members of another archive (jar-in-zip, etc.)."""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Optional

from ..archive import LOCAL_FILE_HEADER_SIGNATURE, ArchiveMember
from ..config import NormalizerConfig
from ..errors import ArchiveFormatError
from ..members import normalize_member, peek_member
from ..normalizer import FilenameCmp, normalize_archive

logger = logging.getLogger(__name__)


class NestedArchiveNormalizer:
    """
    Member normalizer that canonicalizes inner ZIP archives.

    Members are sniffed by their first four bytes, so inner archives are found
    regardless of their file name. Nesting deeper than ``config.max_depth``,
    encrypted members and members that merely look like archives are left
    untouched.
    """

    def __init__(
        self, config: NormalizerConfig, filename_cmp: Optional[FilenameCmp] = None
    ):
        self.config = config
        self.filename_cmp = filename_cmp
        self._depth = 0

    def __call__(self, member: ArchiveMember) -> None:
        if member.is_dir or member.is_encrypted or self._depth >= self.config.max_depth:
            return
        if peek_member(member, len(LOCAL_FILE_HEADER_SIGNATURE)) != LOCAL_FILE_HEADER_SIGNATURE:
            return

        logger.debug("normalizing nested archive %s", member.filename)
        normalize_member(member, self._rewrite)

    def _rewrite(self, path: str) -> bool:
        original = Path(path).read_bytes()
        self._depth += 1
        try:
            normalize_archive(path, self.config, self.filename_cmp, member_normalizer=self)
        except (zipfile.BadZipFile, ArchiveFormatError) as e:
            logger.debug("leaving %s as is, not a usable archive: %s", path, e)
            return False
        finally:
            self._depth -= 1
        return Path(path).read_bytes() != original
