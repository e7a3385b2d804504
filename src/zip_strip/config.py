"""Configuration schema for zip-strip using Pydantic."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigError

# Earliest timestamp that survives the DOS date/time encoding in every time
# zone: 1980-01-01 00:00:00 UTC plus 12 hours and 1 minute.
SAFE_EPOCH = 315576060

SOURCE_DATE_EPOCH = "SOURCE_DATE_EPOCH"

DEFAULT_EXTENSIONS = [
    ".zip",
    ".jar",
    ".war",
    ".ear",
    ".apk",
    ".aar",
    ".whl",
    ".epub",
    ".docx",
    ".xlsx",
    ".pptx",
    ".odt",
    ".ods",
    ".odp",
]


class NormalizerConfig(BaseModel):
    """Settings shared by every component during one normalization run."""

    model_config = ConfigDict(frozen=True)

    canonical_time: Optional[int] = Field(default=None, ge=0, le=0xFFFFFFFF)
    """Unix time stamped into every member. Defaults to SAFE_EPOCH."""

    nested: bool = False
    """Also normalize ZIP archives stored as members of the archive."""

    max_depth: int = Field(default=4, ge=1)
    """How many levels of nested archives are normalized."""

    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    """File suffixes treated as ZIP archives when scanning directories."""

    @property
    def timestamp(self) -> int:
        """The canonical time, falling back to SAFE_EPOCH when unset."""
        return SAFE_EPOCH if self.canonical_time is None else self.canonical_time

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> NormalizerConfig:
        """Loads and validates a NormalizerConfig from a YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> NormalizerConfig:
        """Builds a config whose canonical time comes from SOURCE_DATE_EPOCH."""
        if environ is None:
            environ = os.environ
        value = environ.get(SOURCE_DATE_EPOCH)
        if not value:
            return cls()
        try:
            epoch = int(value)
        except ValueError as exc:
            raise ConfigError(
                f"{SOURCE_DATE_EPOCH} must be an integer, got {value!r}"
            ) from exc
        if not 0 <= epoch <= 0xFFFFFFFF:
            raise ConfigError(f"{SOURCE_DATE_EPOCH} out of range: {epoch}")
        return cls(canonical_time=epoch)
