"""Per-member helpers for normalizers that rewrite member content."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Callable

from .archive import ArchiveMember

logger = logging.getLogger(__name__)

# Receives the path of a scratch file holding the member's content and returns
# True when it rewrote that file.
ContentRewriter = Callable[[str], bool]


def peek_member(member: ArchiveMember, nbytes: int) -> bytes:
    """
    Returns the first ``nbytes`` of the member's decompressed content.

    Fewer bytes are returned when the content is shorter. The member's recorded
    compression method and sizes are not affected.
    """
    if nbytes < 0:
        raise ValueError(f"nbytes must be non-negative, got {nbytes}")
    return member.read(nbytes)


def normalize_member(member: ArchiveMember, rewrite: ContentRewriter) -> bool:
    """
    Runs ``rewrite`` on a scratch copy of the member's content.

    This method:
    1. Extracts the member into a private temporary directory.
    2. Calls ``rewrite`` with the scratch file's path.
    3. Replaces the member's content if ``rewrite`` reports a change.

    The scratch file is removed on every exit path. Returns whether the
    content was replaced.
    """
    with tempfile.TemporaryDirectory(prefix="zip-strip-") as scratch_dir:
        scratch = Path(scratch_dir) / "member"
        member.extract(scratch)

        if not rewrite(str(scratch)):
            return False

        member.replace_content(scratch.read_bytes())

    logger.debug("replaced content of %s", member.filename)
    return True
