"""The Planner turns command-line paths into the list of archives to normalize."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

from .config import NormalizerConfig


@dataclass(frozen=True)
class NormalizationTarget:
    """A single archive to rewrite in place."""

    path: Path


class Planner:
    """Resolves files and directories into normalization targets."""

    def __init__(self, config: NormalizerConfig):
        self.config = config

    def is_archive_name(self, path: Path) -> bool:
        suffixes = {ext.lower() for ext in self.config.extensions}
        return path.suffix.lower() in suffixes

    def plan(self, paths: Iterable[Path]) -> List[NormalizationTarget]:
        """
        Flattens the given paths into a sorted, de-duplicated list of targets.

        Files are always included; directories are scanned recursively for
        files with one of the configured archive extensions.
        """
        targets = {}

        for path in paths:
            path = Path(path)
            if path.is_dir():
                for candidate in sorted(path.rglob("*")):
                    if candidate.is_file() and self.is_archive_name(candidate):
                        targets.setdefault(
                            candidate.resolve(), NormalizationTarget(candidate)
                        )
            else:
                targets[path.resolve()] = NormalizationTarget(path)

        return [targets[key] for key in sorted(targets)]
