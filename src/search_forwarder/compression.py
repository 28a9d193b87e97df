"""
Compression codecs for backup objects.

UNCOMPRESSED and GZIP/ZIP use the standard library; Snappy uses the
python-snappy framing format so objects can be read back with stock tools.
"""

from __future__ import annotations

import gzip
import io
import zipfile

import snappy

from .config import CompressionFormat

ZIP_MEMBER_NAME = "records.ndjson"

_EXTENSIONS = {
    CompressionFormat.UNCOMPRESSED: "",
    CompressionFormat.GZIP: ".gz",
    CompressionFormat.ZIP: ".zip",
    CompressionFormat.SNAPPY: ".snappy",
}


def extension_for(fmt: CompressionFormat | str) -> str:
    """Key suffix conventionally used for objects in this format."""
    return _EXTENSIONS[CompressionFormat(fmt)]


def compress(data: bytes, fmt: CompressionFormat | str) -> bytes:
    fmt = CompressionFormat(fmt)
    if fmt is CompressionFormat.UNCOMPRESSED:
        return bytes(data)
    if fmt is CompressionFormat.GZIP:
        # mtime=0 keeps output deterministic for identical input
        return gzip.compress(data, mtime=0)
    if fmt is CompressionFormat.ZIP:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(ZIP_MEMBER_NAME, data)
        return buf.getvalue()
    src, dst = io.BytesIO(data), io.BytesIO()
    snappy.stream_compress(src, dst)
    return dst.getvalue()


def decompress(data: bytes, fmt: CompressionFormat | str) -> bytes:
    fmt = CompressionFormat(fmt)
    if fmt is CompressionFormat.UNCOMPRESSED:
        return bytes(data)
    if fmt is CompressionFormat.GZIP:
        return gzip.decompress(data)
    if fmt is CompressionFormat.ZIP:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            return zf.read(ZIP_MEMBER_NAME)
    src, dst = io.BytesIO(data), io.BytesIO()
    snappy.stream_decompress(src, dst)
    return dst.getvalue()


def detect_format(key: str) -> CompressionFormat:
    """Guess the compression format of a backup object from its key suffix."""
    for fmt, ext in _EXTENSIONS.items():
        if ext and key.endswith(ext):
            return fmt
    return CompressionFormat.UNCOMPRESSED
