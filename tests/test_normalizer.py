import io
import os
import stat
import struct
import zipfile
from pathlib import Path

import pytest

from zip_strip.archive import ZipArchive
from zip_strip.config import NormalizerConfig
from zip_strip.errors import MalformedExtraFieldError
from zip_strip.handlers.nested import NestedArchiveNormalizer
from zip_strip.members import normalize_member
from zip_strip.normalizer import canonical_unix_mode, normalize_archive

TIMESTAMP_EXTRA = bytes.fromhex("55 54 05 00 01 78 56 34 12")
LOCAL_TIMESTAMP_EXTRA = bytes.fromhex("55 54 0d 00 07 78 56 34 12 78 56 34 12 78 56 34 12")
UID_GID_EXTRA = bytes.fromhex("75 78 0b 00 01 04 e8 03 00 00 04 e8 03 00 00")


def test_members_are_sorted(make_zip):
    path = make_zip(
        "order.zip",
        [{"name": "b.txt", "data": b"b"}, {"name": "a.txt", "data": b"a"}],
    )

    result = normalize_archive(path)

    assert result.members == ["a.txt", "b.txt"]
    with zipfile.ZipFile(path) as zf:
        assert zf.namelist() == ["a.txt", "b.txt"]
        assert zf.read("a.txt") == b"a"
        assert zf.read("b.txt") == b"b"


def test_custom_filename_comparator(make_zip):
    path = make_zip(
        "order.zip",
        [{"name": "a.txt"}, {"name": "c.txt"}, {"name": "b.txt"}],
    )

    def reverse(a, b):
        return (a < b) - (a > b)

    normalize_archive(path, filename_cmp=reverse)

    with zipfile.ZipFile(path) as zf:
        assert zf.namelist() == ["c.txt", "b.txt", "a.txt"]


def test_timestamps_use_fallback_epoch(make_zip):
    path = make_zip("time.zip", [{"name": "a.txt", "date_time": (2023, 3, 4, 5, 6, 8)}])

    normalize_archive(path)

    with zipfile.ZipFile(path) as zf:
        # SAFE_EPOCH is 1980-01-01 12:01:00 UTC
        assert zf.getinfo("a.txt").date_time == (1980, 1, 1, 12, 1, 0)


def test_timestamps_use_canonical_time(make_zip):
    path = make_zip("time.zip", [{"name": "a.txt"}])

    normalize_archive(path, NormalizerConfig(canonical_time=1000000000))

    with zipfile.ZipFile(path) as zf:
        assert zf.getinfo("a.txt").date_time == (2001, 9, 9, 1, 46, 40)


def test_timestamps_before_1980_are_clamped(make_zip):
    path = make_zip("time.zip", [{"name": "a.txt"}])

    normalize_archive(path, NormalizerConfig(canonical_time=0))

    with zipfile.ZipFile(path) as zf:
        assert zf.getinfo("a.txt").date_time == (1980, 1, 1, 0, 0, 0)


def test_unix_permissions_are_canonical(make_zip):
    path = make_zip(
        "perms.zip",
        [
            {"name": "bin/run.sh", "mode": 0o100755},
            {"name": "bin/", "mode": 0o40755},
            {"name": "setuid", "mode": 0o104755},
        ],
    )

    normalize_archive(path)

    with zipfile.ZipFile(path) as zf:
        assert zf.getinfo("bin/run.sh").external_attr >> 16 == 0o100644
        assert zf.getinfo("bin/").external_attr >> 16 == 0o40644
        assert stat.S_IMODE(zf.getinfo("setuid").external_attr >> 16) == 0o644


def test_non_unix_attributes_are_left_alone(make_zip):
    path = make_zip("dos.zip", [{"name": "a.txt", "create_system": 0, "mode": 0o100755}])

    normalize_archive(path)

    with zipfile.ZipFile(path) as zf:
        assert zf.getinfo("a.txt").external_attr >> 16 == 0o100755


def test_canonical_unix_mode():
    assert canonical_unix_mode(is_dir=False) == 0o100644
    assert canonical_unix_mode(is_dir=True) == 0o40644


def test_extra_fields_are_normalized_in_both_headers(make_zip):
    path = make_zip(
        "extra.zip",
        [
            {
                "name": "a.txt",
                "data": b"a",
                "extra": TIMESTAMP_EXTRA + UID_GID_EXTRA,
                "local_extra": LOCAL_TIMESTAMP_EXTRA + UID_GID_EXTRA,
            }
        ],
    )

    normalize_archive(path, NormalizerConfig(canonical_time=1000000000))

    canonical = struct.pack("<I", 1000000000)
    zeroed_ids = bytes.fromhex("75 78 0b 00 01 04 00 00 00 00 04 00 00 00 00")
    with ZipArchive(path) as archive:
        member = archive.member("a.txt")
        assert member.central_extra == bytes.fromhex("55 54 05 00 01 00 CA 9A 3B") + zeroed_ids
        assert member.local_extra == bytes.fromhex("55 54 0d 00 07") + canonical * 3 + zeroed_ids
        assert member.read() == b"a"


def test_normalize_is_idempotent(make_zip):
    path = make_zip(
        "idem.zip",
        [
            {"name": "z/data.bin", "data": os.urandom(2048)},
            {"name": "a.txt", "data": b"text " * 100, "extra": TIMESTAMP_EXTRA},
            {"name": "stored", "data": b"raw", "compress_type": zipfile.ZIP_STORED},
        ],
        comment=b"built by ci",
    )

    normalize_archive(path)
    first = path.read_bytes()
    normalize_archive(path)

    assert path.read_bytes() == first
    with zipfile.ZipFile(path) as zf:
        assert zf.comment == b"built by ci"


def test_insertion_order_and_build_metadata_do_not_matter(make_zip):
    entries = [
        {
            "name": "a.txt",
            "data": b"alpha",
            "date_time": (2020, 1, 1, 0, 0, 0),
            "mode": 0o100755,
            "extra": TIMESTAMP_EXTRA + UID_GID_EXTRA,
        },
        {"name": "b.txt", "data": b"beta", "date_time": (2020, 1, 1, 0, 0, 0)},
    ]
    other = [
        {
            "name": "b.txt",
            "data": b"beta",
            "date_time": (2024, 7, 8, 9, 10, 12),
            "mode": 0o100600,
        },
        {
            "name": "a.txt",
            "data": b"alpha",
            "date_time": (2024, 7, 8, 9, 10, 12),
            "extra": bytes.fromhex("55 54 05 00 01 11 22 33 44")
            + bytes.fromhex("75 78 0b 00 01 04 f4 01 00 00 04 64 00 00 00"),
        },
    ]
    first = make_zip("first.zip", entries)
    second = make_zip("second.zip", other)

    normalize_archive(first)
    normalize_archive(second)

    assert first.read_bytes() == second.read_bytes()


def test_member_normalizer_rewrites_content(make_zip):
    path = make_zip(
        "content.zip",
        [{"name": "a.txt", "data": b"lower"}, {"name": "b.bin", "data": b"\x00\x01"}],
    )

    def upper_text(member):
        if not member.filename.endswith(".txt"):
            return

        def rewrite(scratch):
            data = Path(scratch).read_bytes()
            Path(scratch).write_bytes(data.upper())
            return True

        normalize_member(member, rewrite)

    result = normalize_archive(path, member_normalizer=upper_text)

    assert result.modified == ["a.txt"]
    with zipfile.ZipFile(path) as zf:
        assert zf.read("a.txt") == b"LOWER"
        assert zf.read("b.bin") == b"\x00\x01"


def test_failure_leaves_original_untouched(make_zip):
    path = make_zip("fail.zip", [{"name": "a.txt"}, {"name": "b.txt"}])
    original = path.read_bytes()

    def explode(member):
        if member.filename == "b.txt":
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        normalize_archive(path, member_normalizer=explode)

    assert path.read_bytes() == original
    assert sorted(p.name for p in path.parent.iterdir()) == ["fail.zip"]


def test_malformed_extra_field_aborts(make_zip):
    path = make_zip(
        "bad.zip",
        [{"name": "a.txt", "extra": bytes.fromhex("55 54 03 00 01 78 56")}],
    )
    original = path.read_bytes()

    with pytest.raises(MalformedExtraFieldError):
        normalize_archive(path)

    assert path.read_bytes() == original


def test_file_mode_of_archive_is_kept(make_zip):
    path = make_zip("mode.zip", [{"name": "a.txt"}])
    path.chmod(0o640)

    normalize_archive(path)

    assert stat.S_IMODE(path.stat().st_mode) == 0o640


def stored_data(path, name):
    with ZipArchive(path) as archive:
        member = archive.member(name)
        buf = io.BytesIO()
        archive.copy_raw(member, buf)
        return member.compress_size, member.info.CRC, buf.getvalue()


def test_compressed_data_is_copied_as_is(make_zip):
    log = b"".join(b"step %d of the build finished\n" % i for i in range(2000))
    path = make_zip(
        "fast.zip",
        [
            {"name": "build.log", "data": log, "compresslevel": 1},
            {"name": "notes.txt", "data": b"notes " * 50},
        ],
    )
    before = stored_data(path, "build.log")

    def touch_notes(member):
        if member.filename == "notes.txt":
            member.replace_content(b"NOTES")

    result = normalize_archive(path, member_normalizer=touch_notes)

    assert result.modified == ["notes.txt"]
    assert stored_data(path, "build.log") == before
    with zipfile.ZipFile(path) as zf:
        assert zf.testzip() is None
        assert zf.read("build.log") == log
        assert zf.read("notes.txt") == b"NOTES"
        assert zf.getinfo("build.log").date_time == (1980, 1, 1, 12, 1, 0)


def test_legacy_names_sort_and_stay_as_stored_bytes(make_zip):
    path = make_zip(
        "legacy.zip",
        [
            {"raw_name": b"\xe0a.txt", "data": b"a"},
            {"raw_name": b"\xb0b.txt", "data": b"b"},
            {"name": "c.txt", "data": b"c"},
        ],
    )

    result = normalize_archive(path)

    # cp437 0xb0 is U+2591 and 0xe0 is U+03B1
    assert result.members == ["c.txt", "░b.txt", "αa.txt"]
    raw = path.read_bytes()
    assert raw.count(b"\xb0b.txt") == 2
    assert raw.count(b"\xe0a.txt") == 2
    assert "░b.txt".encode("utf-8") not in raw
    with zipfile.ZipFile(path) as zf:
        assert zf.namelist() == result.members
        assert all(info.flag_bits & 0x800 == 0 for info in zf.infolist())
        assert zf.read("αa.txt") == b"a"


def test_utf8_names_keep_their_flag(make_zip):
    path = make_zip("utf8.zip", [{"name": "café.txt", "data": b"x"}, {"name": "b.txt"}])

    normalize_archive(path)

    with zipfile.ZipFile(path) as zf:
        assert zf.namelist() == ["b.txt", "café.txt"]
        assert zf.getinfo("café.txt").flag_bits & 0x800
        assert zf.getinfo("b.txt").flag_bits & 0x800 == 0


def test_empty_dos_attributes_stay_empty(make_zip):
    path = make_zip(
        "dos.zip",
        [
            {"name": "a.txt", "data": b"a", "create_system": 0, "mode": 0},
            {"name": "b.txt", "data": b"b", "create_system": 0, "mode": 0},
        ],
    )

    def replace_b(member):
        if member.filename == "b.txt":
            member.replace_content(b"B")

    normalize_archive(path, member_normalizer=replace_b)

    with zipfile.ZipFile(path) as zf:
        assert [info.external_attr for info in zf.infolist()] == [0, 0]
        assert zf.read("b.txt") == b"B"


def test_encrypted_members_pass_through(make_zip):
    path = make_zip(
        "locked.zip",
        [
            {"name": "secret.bin", "data": b"ciphertext", "compress_type": zipfile.ZIP_STORED},
            {"name": "a.txt", "data": b"a"},
        ],
    )
    data = bytearray(path.read_bytes())
    # secret.bin comes first in both the local headers and the central directory
    data[data.find(b"PK\x03\x04") + 6] |= 0x01
    data[data.find(b"PK\x01\x02") + 8] |= 0x01
    path.write_bytes(bytes(data))
    before = stored_data(path, "secret.bin")
    config = NormalizerConfig()

    normalize_archive(path, config, member_normalizer=NestedArchiveNormalizer(config))

    assert stored_data(path, "secret.bin") == before
    with zipfile.ZipFile(path) as zf:
        assert zf.namelist() == ["a.txt", "secret.bin"]
        assert zf.getinfo("secret.bin").flag_bits & 0x01
        assert zf.getinfo("secret.bin").date_time == (1980, 1, 1, 12, 1, 0)
        assert zf.read("a.txt") == b"a"
