"""Exception types raised while normalizing ZIP archives.

I/O failures are not wrapped; they propagate as the built-in ``OSError``.
"""


class ZipStripError(Exception):
    """Base exception class for all normalization errors."""

    pass


class MalformedExtraFieldError(ZipStripError):
    """Raised when an extra-field record chain cannot be parsed.

    This exception is raised when:
    - A record header claims more payload bytes than remain in the buffer
    - A known record's payload does not match its documented layout
    """

    pass


class StreamReadError(ZipStripError):
    """Raised when a member's decompressed stream cannot be read.

    A clean end-of-stream is not an error; this covers corrupt compressed
    data, CRC mismatches and streams that end before their declared size.
    """

    pass


class ArchiveFormatError(ZipStripError):
    """Raised when the archive structure is unusable for normalization."""

    pass


class ConfigError(ZipStripError):
    """Raised when configuration taken from the environment is invalid."""

    pass
