"""Adapter around :mod:`zipfile` exposing the member view the normalizer needs.

``zipfile`` only exposes the central-directory extra field and writes that same
field into both headers. This module also reads each member's local-header
extra field and writes it back separately, and it rebuilds the archive in a
caller-chosen member order instead of mutating the source in place.

Members whose content was not replaced are copied with their compressed bytes
untouched; only replaced content goes through ``zipfile``'s compressor. File
names are written back with the exact bytes and UTF-8 flag they were read with.
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import stat
import struct
import tempfile
import time
import zipfile
import zlib
from collections import Counter
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple, Union

from .errors import ArchiveFormatError, StreamReadError
from .extra_fields import ZIP64_ID, strip_extra_fields

logger = logging.getLogger(__name__)

LOCAL_FILE_HEADER_SIGNATURE = b"PK\x03\x04"
# signature, version, flags, method, time, date, crc, sizes, name/extra lengths
LOCAL_FILE_HEADER = struct.Struct("<4s2B4HL2L2H")

# "version made by" host system for Unix; permission bits are only meaningful then.
UNIX_SYSTEM = 3

# general purpose flag bits
FLAG_ENCRYPTED = 0x0001
FLAG_DATA_DESCRIPTOR = 0x0008
FLAG_UTF8_NAME = 0x0800

COPY_CHUNK_SIZE = 1024 * 1024

DOS_MIN_DATE_TIME = (1980, 1, 1, 0, 0, 0)
DOS_MAX_DATE_TIME = (2107, 12, 31, 23, 59, 58)

DateTime = Tuple[int, int, int, int, int, int]


def unix_to_dos_date_time(timestamp: int) -> DateTime:
    """Convert a Unix time to a ZIP ``date_time`` tuple, in UTC.

    Times outside the DOS range (1980-2107) are clamped to its bounds.
    """
    t = time.gmtime(timestamp)
    if t.tm_year < DOS_MIN_DATE_TIME[0]:
        return DOS_MIN_DATE_TIME
    if t.tm_year > DOS_MAX_DATE_TIME[0]:
        return DOS_MAX_DATE_TIME
    return (t.tm_year, t.tm_mon, t.tm_mday, t.tm_hour, t.tm_min, t.tm_sec)


def raw_filename(info: zipfile.ZipInfo) -> bytes:
    """The file name bytes as stored in the archive.

    ``zipfile`` decodes names as UTF-8 when flag bit 11 is set and as cp437
    otherwise; both decodings are lossless, so encoding back recovers the bytes.
    """
    encoding = "utf-8" if info.flag_bits & FLAG_UTF8_NAME else "cp437"
    return info.orig_filename.encode(encoding)


@contextmanager
def _stream_errors(filename: str) -> Iterator[None]:
    try:
        yield
    except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
        raise StreamReadError(f"failed to read ZIP member {filename!r}: {exc}") from exc
    except NotImplementedError as exc:
        raise StreamReadError(
            f"unsupported compression for ZIP member {filename!r}: {exc}"
        ) from exc


class NormalizedZipInfo(zipfile.ZipInfo):
    """ZipInfo that writes a local-header extra field of its own.

    ``extra`` keeps going to the central directory. When ``raw_filename`` is
    set, those exact bytes are written as the name in both headers, with
    ``filename_flags`` (the UTF-8 bit) added to the flag word.
    """

    __slots__ = ("local_extra", "raw_filename", "filename_flags")

    def __init__(self, filename: str = "NoName", date_time: DateTime = DOS_MIN_DATE_TIME):
        super().__init__(filename, date_time)
        self.local_extra = b""
        self.raw_filename = None
        self.filename_flags = 0

    def _encodeFilenameFlags(self):
        if self.raw_filename is None:
            return super()._encodeFilenameFlags()
        return self.raw_filename, self.flag_bits | self.filename_flags

    def FileHeader(self, zip64=None):
        central_extra = self.extra
        self.extra = self.local_extra
        try:
            return super().FileHeader(zip64)
        finally:
            self.extra = central_extra


class ArchiveMember:
    """One entry of a :class:`ZipArchive`.

    The source ``ZipInfo`` is never modified: reading content is a pure query
    and the fields the normalizer rewrites live on the member itself.
    """

    def __init__(
        self,
        archive: ZipArchive,
        info: zipfile.ZipInfo,
        local_extra: bytes,
        data_offset: int,
    ):
        self._archive = archive
        self.info = info
        self.date_time: DateTime = tuple(info.date_time)
        self.external_attr: int = info.external_attr
        self.central_extra: bytes = info.extra
        self.local_extra: bytes = local_extra
        self.data_offset = data_offset
        """Position of the compressed data in the source archive."""
        self._content: Optional[bytes] = None

    def __repr__(self) -> str:
        return f"<ArchiveMember {self.filename!r}>"

    @property
    def filename(self) -> str:
        return self.info.filename

    @property
    def raw_filename(self) -> bytes:
        return raw_filename(self.info)

    @property
    def is_encrypted(self) -> bool:
        return bool(self.info.flag_bits & FLAG_ENCRYPTED)

    @property
    def compress_type(self) -> int:
        return self.info.compress_type

    @property
    def compress_size(self) -> int:
        """Compressed size recorded in the source archive."""
        return self.info.compress_size

    @property
    def file_size(self) -> int:
        if self._content is not None:
            return len(self._content)
        return self.info.file_size

    @property
    def is_dir(self) -> bool:
        return self.info.is_dir()

    @property
    def is_unix(self) -> bool:
        return self.info.create_system == UNIX_SYSTEM

    @property
    def unix_mode(self) -> int:
        return (self.external_attr >> 16) & 0xFFFF

    @unix_mode.setter
    def unix_mode(self, mode: int) -> None:
        self.external_attr = (self.external_attr & 0xFFFF) | ((mode & 0xFFFF) << 16)

    @property
    def modified(self) -> bool:
        """True once the member's content has been replaced."""
        return self._content is not None

    def read(self, size: int = -1) -> bytes:
        """Return up to ``size`` decompressed bytes (all of them when negative)."""
        if self._content is not None:
            return self._content if size < 0 else self._content[:size]
        self._check_readable()
        with _stream_errors(self.filename), self._archive.open_stream(self.info) as src:
            return src.read(size)

    def extract(self, path: Union[str, Path]) -> None:
        """Write the decompressed content to ``path``."""
        if self._content is None:
            self._check_readable()
        with open(path, "wb") as dst:
            if self._content is not None:
                dst.write(self._content)
                return
            with _stream_errors(self.filename), self._archive.open_stream(self.info) as src:
                shutil.copyfileobj(src, dst)

    def _check_readable(self) -> None:
        if self.is_encrypted:
            raise StreamReadError(f"ZIP member {self.filename!r} is encrypted")

    def replace_content(self, data: bytes) -> None:
        self._content = bytes(data)

    def to_zipinfo(self) -> NormalizedZipInfo:
        """Build the ZipInfo this member is written back with."""
        zinfo = NormalizedZipInfo(self.info.filename, self.date_time)
        zinfo.raw_filename = self.raw_filename
        zinfo.filename_flags = self.info.flag_bits & FLAG_UTF8_NAME
        zinfo.compress_type = self.info.compress_type
        zinfo.comment = self.info.comment
        zinfo.create_system = self.info.create_system
        zinfo.create_version = self.info.create_version
        zinfo.extract_version = self.info.extract_version
        zinfo.internal_attr = self.info.internal_attr
        zinfo.external_attr = self.external_attr
        # zipfile emits its own ZIP64 record when the rewritten sizes need one.
        zinfo.extra = strip_extra_fields(self.central_extra, (ZIP64_ID,))
        zinfo.local_extra = strip_extra_fields(self.local_extra, (ZIP64_ID,))
        return zinfo


class ZipArchive:
    """A ZIP file opened for normalization and rewritten in place on commit."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._fp: Optional[BinaryIO] = None
        self._zip: Optional[zipfile.ZipFile] = None

    def __enter__(self) -> ZipArchive:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        self._fp = open(self.path, "rb")
        try:
            self._zip = zipfile.ZipFile(self._fp, "r")
        except BaseException:
            self._fp.close()
            self._fp = None
            raise

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None
        if self._fp is not None:
            self._fp.close()
            self._fp = None

    @property
    def zip_file(self) -> zipfile.ZipFile:
        if self._zip is None:
            raise ValueError(f"archive {self.path} is not open")
        return self._zip

    @property
    def comment(self) -> bytes:
        return self.zip_file.comment

    def member_names(self) -> List[str]:
        """Names of all members, in central-directory order."""
        names = [info.filename for info in self.zip_file.infolist()]
        dupes = sorted(name for name, count in Counter(names).items() if count > 1)
        if dupes:
            raise ArchiveFormatError(f"duplicate member names in {self.path}: {dupes}")
        return names

    def member(self, name: str) -> ArchiveMember:
        info = self.zip_file.getinfo(name)
        local_extra, data_offset = self._read_local_header(info)
        return ArchiveMember(self, info, local_extra, data_offset)

    def raw_filename(self, name: str) -> bytes:
        return raw_filename(self.zip_file.getinfo(name))

    def open_stream(self, info: zipfile.ZipInfo) -> BinaryIO:
        return self.zip_file.open(info, "r")

    def copy_raw(self, member: ArchiveMember, dest: BinaryIO) -> None:
        """Copy the member's compressed bytes, as stored, to ``dest``."""
        self._fp.seek(member.data_offset)
        remaining = member.compress_size
        while remaining:
            chunk = self._fp.read(min(remaining, COPY_CHUNK_SIZE))
            if not chunk:
                raise ArchiveFormatError(
                    f"truncated data for {member.filename!r} in {self.path}"
                )
            dest.write(chunk)
            remaining -= len(chunk)

    def _read_local_header(self, info: zipfile.ZipInfo) -> Tuple[bytes, int]:
        """Returns the local-header extra field and the offset of the member data."""
        self._fp.seek(info.header_offset)
        header = self._fp.read(LOCAL_FILE_HEADER.size)
        if len(header) != LOCAL_FILE_HEADER.size:
            raise ArchiveFormatError(
                f"truncated local file header for {info.filename!r} in {self.path}"
            )
        fields = LOCAL_FILE_HEADER.unpack(header)
        if fields[0] != LOCAL_FILE_HEADER_SIGNATURE:
            raise ArchiveFormatError(
                f"bad local file header signature for {info.filename!r} in {self.path}"
            )
        name_len, extra_len = fields[-2:]
        self._fp.seek(name_len, io.SEEK_CUR)
        extra = self._fp.read(extra_len)
        if len(extra) != extra_len:
            raise ArchiveFormatError(
                f"truncated local extra field for {info.filename!r} in {self.path}"
            )
        return extra, self._fp.tell()

    def write(self, members: Iterable[ArchiveMember], dest: BinaryIO) -> None:
        """Write ``members``, in order, as a new archive to ``dest``.

        Replaced content is compressed again with the member's method; every
        other member keeps its compressed bytes, CRC and sizes.
        """
        with zipfile.ZipFile(dest, "w", allowZip64=True) as out:
            out.comment = self.comment
            for member in members:
                if member.modified:
                    self._write_content(out, member)
                else:
                    self._write_raw(out, member)

    def _write_content(self, out: zipfile.ZipFile, member: ArchiveMember) -> None:
        zinfo = member.to_zipinfo()
        out.writestr(zinfo, member.read())
        # writestr turns empty attributes into 0600; the central record is
        # written from this zinfo on close.
        zinfo.external_attr = member.external_attr

    def _write_raw(self, out: zipfile.ZipFile, member: ArchiveMember) -> None:
        info = member.info
        if member.is_encrypted and info.flag_bits & FLAG_DATA_DESCRIPTOR:
            # The password check byte of such members is derived from the
            # stored modification time, which is about to change.
            raise ArchiveFormatError(
                f"cannot rewrite encrypted member {member.filename!r} with a "
                f"data descriptor in {self.path}"
            )

        zinfo = member.to_zipinfo()
        zinfo.flag_bits = info.flag_bits & ~FLAG_DATA_DESCRIPTOR
        zinfo.CRC = info.CRC
        zinfo.compress_size = info.compress_size
        zinfo.file_size = info.file_size
        zip64 = max(zinfo.file_size, zinfo.compress_size) > zipfile.ZIP64_LIMIT

        out.fp.seek(out.start_dir)
        zinfo.header_offset = out.fp.tell()
        out.fp.write(zinfo.FileHeader(zip64))
        self.copy_raw(member, out.fp)
        out.start_dir = out.fp.tell()
        out.filelist.append(zinfo)
        out.NameToInfo[zinfo.filename] = zinfo

    def commit(self, members: Iterable[ArchiveMember]) -> None:
        """Replace the archive on disk with one holding ``members`` in order.

        The new archive is written beside the original and moved over it only
        once complete; on failure the original is left untouched.
        """
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as tmp:
                self.write(members, tmp)
            os.chmod(tmp_path, stat.S_IMODE(os.stat(self.path).st_mode))
            self.close()
            os.replace(tmp_path, self.path)
        except BaseException:
            if tmp_path.exists():
                tmp_path.unlink()
            raise
        logger.info("rewrote %s", self.path)
