import io
import zipfile

import pytest

from zip_strip.archive import NormalizedZipInfo


def build_zip(fileobj, entries, comment=b""):
    """Writes ``entries`` (dicts) into a new ZIP archive on ``fileobj``."""
    with zipfile.ZipFile(fileobj, "w") as zf:
        zf.comment = comment
        for entry in entries:
            raw_name = entry.get("raw_name")
            zinfo = NormalizedZipInfo(
                raw_name.decode("cp437") if raw_name else entry["name"],
                entry.get("date_time", (2021, 6, 1, 12, 30, 0)),
            )
            zinfo.raw_filename = raw_name
            zinfo.compress_type = entry.get("compress_type", zipfile.ZIP_DEFLATED)
            zinfo.create_system = entry.get("create_system", 3)
            zinfo.external_attr = entry.get("mode", 0o100644) << 16
            zinfo.extra = entry.get("extra", b"")
            zinfo.local_extra = entry.get("local_extra", zinfo.extra)
            zf.writestr(zinfo, entry.get("data", b""), compresslevel=entry.get("compresslevel"))
            # writestr fills in 0600 for empty attributes
            zinfo.external_attr = entry.get("mode", 0o100644) << 16


def zip_bytes(entries, comment=b""):
    buf = io.BytesIO()
    build_zip(buf, entries, comment)
    return buf.getvalue()


@pytest.fixture
def make_zip(tmp_path):
    def _make(name, entries, comment=b""):
        path = tmp_path / name
        with open(path, "wb") as f:
            build_zip(f, entries, comment)
        return path

    return _make


@pytest.fixture(name="zip_bytes")
def zip_bytes_fixture():
    return zip_bytes
