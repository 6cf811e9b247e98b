"""
PNG chunk helpers used to embed generation parameters into saved images.

Only the chunk framing is handled here: chunks are located by their length
field and the new chunk is spliced in front of IEND. Nothing else in the file
is parsed or validated.
"""

import struct
from typing import Dict, Iterator, Tuple, Union

# --- Constants ---
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
END_CHUNK_TYPE = b"IEND"
TEXT_CHUNK_TYPE = b"tEXt"
CRC_POLYNOMIAL = 0xEDB88320


# --- Errors ---
class PngChunkError(Exception):
    """Base class for chunk framing errors."""


class InvalidChunk(PngChunkError, ValueError):
    """Raised when a chunk type tag is not exactly four bytes."""


class MalformedPng(PngChunkError):
    """
    Raised when no IEND chunk is found before the buffer ends.
    The untouched input is kept on `data` so callers can still save it.
    """

    def __init__(self, message: str, data: bytes):
        super().__init__(message)
        self.data = data


# --- CRC32 ---
def _build_crc_table() -> Tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            if c & 1:
                c = CRC_POLYNOMIAL ^ (c >> 1)
            else:
                c >>= 1
        table.append(c)
    return tuple(table)


CRC_TABLE = _build_crc_table()


def crc32(data: bytes) -> int:
    """Reflected CRC-32 as used by PNG (same result as zlib.crc32)."""
    crc = 0xFFFFFFFF
    for byte in data:
        crc = CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


# --- Chunk Codec ---
def _type_bytes(chunk_type: Union[str, bytes]) -> bytes:
    if isinstance(chunk_type, str):
        try:
            chunk_type = chunk_type.encode("ascii")
        except UnicodeEncodeError:
            raise InvalidChunk(f"Chunk type {chunk_type!r} is not ASCII")
    if len(chunk_type) != 4:
        raise InvalidChunk(f"Chunk type must be exactly 4 bytes, got {len(chunk_type)}")
    return bytes(chunk_type)


def build_chunk(chunk_type: Union[str, bytes], data: bytes) -> bytes:
    """
    Builds a complete chunk: [length][type][data][crc], big-endian.
    The CRC covers the type and the data, not the length field.
    """
    type_bytes = _type_bytes(chunk_type)
    body = type_bytes + bytes(data)
    return struct.pack("!I", len(data)) + body + struct.pack("!I", crc32(body))


def insert_before_end(png_bytes: bytes, chunk: bytes) -> bytes:
    """
    Splices `chunk` immediately before the IEND chunk of `png_bytes`.

    Chunks are walked from offset 8 (after the signature) using each chunk's
    length field, so a tEXt payload that happens to contain "IEND" is never
    mistaken for the end marker.
    """
    offset = len(PNG_SIGNATURE)
    while offset + 8 <= len(png_bytes):
        length, chunk_type = struct.unpack_from("!I4s", png_bytes, offset)
        if chunk_type == END_CHUNK_TYPE:
            return png_bytes[:offset] + chunk + png_bytes[offset:]
        offset += 12 + length
    raise MalformedPng("No IEND chunk found in PNG data", png_bytes)


def embed_text_chunk(png_bytes: bytes, keyword: str, text: str) -> bytes:
    """Inserts a tEXt chunk holding `keyword` NUL `text` (UTF-8) before IEND."""
    payload = keyword.encode("utf-8") + b"\x00" + text.encode("utf-8")
    return insert_before_end(png_bytes, build_chunk(TEXT_CHUNK_TYPE, payload))


def iter_chunks(png_bytes: bytes) -> Iterator[Tuple[bytes, bytes]]:
    """Yields (type, data) for every complete chunk after the signature."""
    offset = len(PNG_SIGNATURE)
    while offset + 12 <= len(png_bytes):
        length, chunk_type = struct.unpack_from("!I4s", png_bytes, offset)
        end = offset + 12 + length
        if end > len(png_bytes):
            break
        yield chunk_type, png_bytes[offset + 8:offset + 8 + length]
        offset = end


def read_text_chunks(png_bytes: bytes) -> Dict[str, str]:
    texts = {}
    for chunk_type, data in iter_chunks(png_bytes):
        if chunk_type != TEXT_CHUNK_TYPE:
            continue
        keyword, _, text = data.partition(b"\x00")
        texts[keyword.decode("utf-8", errors="replace")] = text.decode("utf-8", errors="replace")
    return texts
