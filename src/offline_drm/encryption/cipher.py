from __future__ import annotations

import io
import json
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .keys import ALGORITHM, KeyMaterial


# File format:
# MAGIC (6) | version (1) | header_len (4, big-endian) | header JSON bytes
# header JSON includes: {"resource_id": ..., "chunk_size": ..., "algorithm": ..., "content_type": ...}
# Followed by sequence of chunks: [final flag (1) | chunk_ciphertext_length (4) | ciphertext]
#
# Chunk nonce = key material nonce prefix (8) | chunk index (4, big-endian).
# Associated data = "<resource_id>:<chunk index>:<final flag>", so chunks cannot be
# reordered, moved between resources, or cut off after a non-final chunk.

MAGIC = b"ODRM01"
VERSION = 1
TAG_SIZE = 16
MAX_HEADER_SIZE = 64 * 1024
MAX_CHUNKS = 2 ** 32


class CorruptCiphertext(ValueError):
    """Raised when a ciphertext container is malformed, truncated or fails authentication."""


def _nonce(key_material: KeyMaterial, index: int) -> bytes:
    if index >= MAX_CHUNKS:
        raise ValueError("Too many chunks for a single resource")
    return key_material.nonce_prefix + index.to_bytes(4, "big")


def _aad(resource_id: str, index: int, final: bool) -> bytes:
    return f"{resource_id}:{index}:{int(final)}".encode("utf-8")


def encode_header(metadata: Dict[str, object]) -> bytes:
    header_json = json.dumps(metadata, sort_keys=True).encode("utf-8")
    return MAGIC + bytes([VERSION]) + len(header_json).to_bytes(4, "big") + header_json


def read_header(f: BinaryIO) -> Dict[str, object]:
    magic = f.read(len(MAGIC))
    if magic != MAGIC:
        raise CorruptCiphertext("Not an offline resource container")
    version = f.read(1)
    if not version:
        raise CorruptCiphertext("Truncated file (no version)")
    ver = version[0]
    if ver != VERSION:
        raise CorruptCiphertext(f"Unsupported version: {ver}")
    header_len = int.from_bytes(f.read(4), "big")
    if header_len > MAX_HEADER_SIZE:
        raise CorruptCiphertext("Header too large")
    header = f.read(header_len)
    if len(header) < header_len:
        raise CorruptCiphertext("Truncated header")
    try:
        return json.loads(header.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptCiphertext("Unreadable header") from e


def _frame(aes: AESGCM, key_material: KeyMaterial, resource_id: str, index: int,
           chunk: bytes, final: bool) -> bytes:
    ct = aes.encrypt(_nonce(key_material, index), chunk, _aad(resource_id, index, final))
    return bytes([1 if final else 0]) + len(ct).to_bytes(4, "big") + ct


def encrypt_iter(
    pieces: Iterable[bytes],
    key_material: KeyMaterial,
    resource_id: str,
    chunk_size: int = 64 * 1024,
    metadata: Optional[Dict[str, object]] = None,
) -> Iterator[bytes]:
    """Encrypt an iterable of plaintext pieces of any size into container frames.

    The header is yielded first, then one frame per `chunk_size` block. The last
    frame is always flagged final (it is empty for empty or block-aligned input),
    which is what lets the reader detect truncation.
    """
    aes = AESGCM(key_material.key)
    header = dict(metadata or {})
    header.update({"resource_id": resource_id, "chunk_size": chunk_size, "algorithm": ALGORITHM})
    yield encode_header(header)

    index = 0
    buf = bytearray()
    for piece in pieces:
        if not piece:
            continue
        buf += piece
        while len(buf) > chunk_size:
            yield _frame(aes, key_material, resource_id, index, bytes(buf[:chunk_size]), final=False)
            del buf[:chunk_size]
            index += 1
    yield _frame(aes, key_material, resource_id, index, bytes(buf), final=True)


def decrypt_iter(
    f: BinaryIO,
    key_material: KeyMaterial,
    resource_id: Optional[str] = None,
) -> Iterator[bytes]:
    """Yield plaintext blocks from a container whose header has already been read.

    Raises:
        CorruptCiphertext: On truncation, trailing data, oversize chunks or a failed tag
    """
    aes = AESGCM(key_material.key)
    index = 0
    saw_final = False
    while True:
        flag = f.read(1)
        if not flag:
            break
        if saw_final:
            raise CorruptCiphertext("Data after final chunk")
        final = flag[0] == 1
        if flag[0] not in (0, 1):
            raise CorruptCiphertext("Bad chunk flag")
        ct_len_b = f.read(4)
        if len(ct_len_b) < 4:
            raise CorruptCiphertext("Truncated chunk length")
        ct_len = int.from_bytes(ct_len_b, "big")
        if ct_len < TAG_SIZE:
            raise CorruptCiphertext("Chunk shorter than authentication tag")
        ct = f.read(ct_len)
        if len(ct) < ct_len:
            raise CorruptCiphertext("Truncated ciphertext")
        try:
            yield aes.decrypt(_nonce(key_material, index), ct, _aad(resource_id or "", index, final))
        except InvalidTag as e:
            raise CorruptCiphertext(f"Authentication failed for chunk {index}") from e
        saw_final = final
        index += 1
    if not saw_final:
        raise CorruptCiphertext("Missing final chunk (truncated)")


def open_container(f: BinaryIO, key_material: KeyMaterial) -> tuple[Dict[str, object], Iterator[bytes]]:
    """Read the header of a container and return (metadata, plaintext iterator)."""
    metadata = read_header(f)
    resource_id = metadata.get("resource_id")
    if not isinstance(resource_id, str):
        raise CorruptCiphertext("Header has no resource id")
    return metadata, decrypt_iter(f, key_material, resource_id)


def encrypt_bytes(plaintext: bytes, key_material: KeyMaterial, resource_id: str,
                  chunk_size: int = 64 * 1024) -> bytes:
    return b"".join(encrypt_iter([plaintext], key_material, resource_id, chunk_size))


def decrypt_bytes(blob: bytes, key_material: KeyMaterial) -> bytes:
    _, chunks = open_container(io.BytesIO(blob), key_material)
    return b"".join(chunks)


def encrypt_stream(input_path: str, output_path: str, key_material: KeyMaterial, resource_id: str,
                   chunk_size: int = 64 * 1024, metadata: Optional[Dict[str, object]] = None) -> int:
    """Stream-encrypt a file in chunks. Returns the number of ciphertext bytes written."""
    if metadata is None:
        metadata = {}
    metadata.setdefault("filename", Path(input_path).name)

    def pieces(fin: BinaryIO) -> Iterator[bytes]:
        while True:
            chunk = fin.read(chunk_size)
            if not chunk:
                break
            yield chunk

    written = 0
    with open(input_path, "rb") as fin, open(output_path, "wb") as fout:
        for frame in encrypt_iter(pieces(fin), key_material, resource_id, chunk_size, metadata):
            fout.write(frame)
            written += len(frame)
    return written


def decrypt_stream(input_path: str, output_path: str, key_material: KeyMaterial) -> Dict[str, object]:
    """Decrypt a container written by `encrypt_stream` or the pipeline. Returns metadata dict.

    The partially written output is removed if the container turns out to be corrupt.
    """
    try:
        with open(input_path, "rb") as fin, open(output_path, "wb") as fout:
            metadata, chunks = open_container(fin, key_material)
            for pt in chunks:
                fout.write(pt)
    except CorruptCiphertext:
        Path(output_path).unlink(missing_ok=True)
        raise
    return metadata
