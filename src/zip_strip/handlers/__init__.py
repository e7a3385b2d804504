"""Member normalizers for formats stored inside ZIP archives."""
