"""
Binary glTF Container

Reads and writes the GLB container: a 12-byte header followed by a JSON chunk
(padded with spaces) and a binary chunk (each buffer padded with zero bytes).
"""

from __future__ import annotations

import json
import struct
from pathlib import Path
from typing import Any, Sequence

from avatar_build.errors import GlbFormatError

GLB_MAGIC = 0x46546C67
GLB_VERSION = 2
JSON_CHUNK = 0x4E4F534A
BIN_CHUNK = 0x004E4942

HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8


def aligned_size(size: int) -> int:
    return (size + 3) & ~3


def encode_json_chunk(gltf: dict[str, Any]) -> bytes:
    payload = json.dumps(gltf, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return payload + b" " * (aligned_size(len(payload)) - len(payload))


def encode_bin_chunk(buffers: Sequence[bytes]) -> bytes:
    payload = bytearray()
    for buffer in buffers:
        payload += buffer
        payload += b"\x00" * (aligned_size(len(buffer)) - len(buffer))
    return bytes(payload)


def encode_glb(gltf: dict[str, Any], buffers: Sequence[bytes]) -> bytes:
    """Serialise a glTF JSON object and its buffers into GLB bytes."""
    json_payload = encode_json_chunk(gltf)
    bin_payload = encode_bin_chunk(buffers)

    total_size = (
        HEADER_SIZE
        + CHUNK_HEADER_SIZE + len(json_payload)
        + CHUNK_HEADER_SIZE + len(bin_payload)
    )

    out = bytearray(struct.pack("<III", GLB_MAGIC, GLB_VERSION, total_size))
    out += struct.pack("<II", len(json_payload), JSON_CHUNK)
    out += json_payload
    out += struct.pack("<II", len(bin_payload), BIN_CHUNK)
    out += bin_payload
    return bytes(out)


def decode_glb(raw: bytes) -> tuple[dict[str, Any], bytes]:
    """
    Parse GLB bytes.

    Returns:
        Tuple of (glTF JSON object, binary chunk payload)

    Raises:
        GlbFormatError: when the header, chunk layout or JSON is invalid
    """
    if len(raw) < HEADER_SIZE + CHUNK_HEADER_SIZE:
        raise GlbFormatError("File is too small to be a valid GLB")

    magic, version, declared_length = struct.unpack_from("<III", raw, 0)
    if magic != GLB_MAGIC:
        raise GlbFormatError(f"Invalid GLB magic: {magic:#010x}")
    if version != GLB_VERSION:
        raise GlbFormatError(f"Unsupported GLB version: {version}")
    if declared_length != len(raw):
        raise GlbFormatError(
            f"GLB declared length {declared_length} does not match file size {len(raw)}"
        )

    offset = HEADER_SIZE
    gltf = None
    bin_chunk = b""
    while offset + CHUNK_HEADER_SIZE <= len(raw):
        chunk_length, chunk_type = struct.unpack_from("<II", raw, offset)
        offset += CHUNK_HEADER_SIZE
        if offset + chunk_length > len(raw):
            raise GlbFormatError("GLB chunk extends past end of file")
        payload = raw[offset:offset + chunk_length]
        offset += chunk_length

        if chunk_type == JSON_CHUNK:
            try:
                gltf = json.loads(payload.decode("utf-8").rstrip(" \t\r\n\0"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise GlbFormatError(f"Invalid JSON chunk: {exc}") from exc
        elif chunk_type == BIN_CHUNK:
            bin_chunk = payload

    if not isinstance(gltf, dict):
        raise GlbFormatError("No JSON chunk in GLB")
    return gltf, bin_chunk


def read_glb(path: Path) -> tuple[dict[str, Any], bytes]:
    return decode_glb(Path(path).read_bytes())


def write_glb(path: Path, gltf: dict[str, Any], buffers: Sequence[bytes]) -> int:
    """Write a GLB file and return the number of bytes written."""
    data = encode_glb(gltf, buffers)
    Path(path).write_bytes(data)
    return len(data)


__all__ = [
    "BIN_CHUNK",
    "GLB_MAGIC",
    "GLB_VERSION",
    "JSON_CHUNK",
    "aligned_size",
    "decode_glb",
    "encode_glb",
    "read_glb",
    "write_glb",
]
