from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, List

from .normalizer import NormalizationResult


class NormalizationReport:
    """Collects the outcome of every archive processed in one run."""

    def __init__(self, report_path: Path):
        self.report_path = report_path
        self.archives: List[Dict] = []
        self._lock = threading.Lock()

    def add_result(self, result: NormalizationResult) -> None:
        with self._lock:
            self.archives.append(
                {
                    "path": str(result.path),
                    "status": "normalized",
                    "members": len(result.members),
                    "modified": list(result.modified),
                }
            )

    def add_failure(self, path: Path, error: Exception) -> None:
        with self._lock:
            self.archives.append(
                {
                    "path": str(path),
                    "status": "failed",
                    "error": f"{type(error).__name__}: {error}",
                }
            )

    @property
    def failures(self) -> int:
        return sum(1 for entry in self.archives if entry["status"] == "failed")

    def save(self) -> None:
        self.report_path.parent.mkdir(parents=True, exist_ok=True)
        archives = sorted(self.archives, key=lambda entry: entry["path"])
        with open(self.report_path, "w") as f:
            json.dump({"archives": archives}, f, indent=2)
