"""Tests for key material and the chunked ciphertext container."""

import io

import pytest

from offline_drm.encryption import cipher
from offline_drm.encryption.keys import (
    KeyMaterial, generate_key_material, generate_symmetric_key, NONCE_PREFIX_SIZE
)


class TestKeyGeneration:
    """Test symmetric key generation."""

    def test_generate_key_256(self):
        """Test generating 256-bit key."""
        key = generate_symmetric_key(256)
        assert len(key) == 32

    def test_generate_key_invalid_size(self):
        """Test that invalid key size raises error."""
        with pytest.raises(ValueError, match="Unsupported key size"):
            generate_symmetric_key(512)

    def test_key_material_is_fresh_per_call(self):
        """Each resource gets independent random key material."""
        a = generate_key_material()
        b = generate_key_material()
        assert a.key != b.key
        assert a.nonce_prefix != b.nonce_prefix
        assert len(a.nonce_prefix) == NONCE_PREFIX_SIZE


class TestKeyMaterialEncoding:
    """Test the `<key hex>:<nonce hex>` encoding."""

    def test_encode_decode(self):
        km = generate_key_material()
        encoded = km.encode()
        assert encoded.count(":") == 1
        assert KeyMaterial.decode(encoded) == km

    def test_decode_tolerates_trailing_newline(self):
        km = generate_key_material()
        assert KeyMaterial.decode(km.encode() + "\n") == km

    @pytest.mark.parametrize("encoded", ["", "abcd", "zz:zz", "00" * 32, "00" * 31 + ":" + "00" * 8])
    def test_decode_rejects_malformed(self, encoded):
        with pytest.raises(ValueError, match="Malformed key material"):
            KeyMaterial.decode(encoded)

    def test_repr_hides_key(self):
        """Key bytes never show up in logs through repr()."""
        km = generate_key_material()
        assert km.key.hex() not in repr(km)
        assert "redacted" in repr(km)


class TestContainer:
    """Test encrypting and decrypting the chunked container."""

    @pytest.mark.parametrize("size", [0, 1, 1024, 1025, 5000])
    def test_encrypt_decrypt_roundtrip(self, size):
        """Round trip across empty, single-chunk, block-aligned and multi-chunk input."""
        km = generate_key_material()
        data = bytes(i % 251 for i in range(size))
        blob = cipher.encrypt_bytes(data, km, "res-00000001", chunk_size=1024)
        assert cipher.decrypt_bytes(blob, km) == data

    def test_ciphertext_does_not_contain_plaintext(self):
        km = generate_key_material()
        data = b"lecture notes " * 200
        blob = cipher.encrypt_bytes(data, km, "res-00000001", chunk_size=1024)
        assert b"lecture notes" not in blob

    def test_header_carries_metadata(self):
        km = generate_key_material()
        frames = list(cipher.encrypt_iter([b"abc"], km, "res-00000001", 1024, {"content_type": "video/mp4"}))
        header = cipher.read_header(io.BytesIO(frames[0]))
        assert header["resource_id"] == "res-00000001"
        assert header["content_type"] == "video/mp4"
        assert header["chunk_size"] == 1024

    def test_uneven_pieces_are_rechunked(self):
        """Input pieces of any size produce the same plaintext on decryption."""
        km = generate_key_material()
        pieces = [b"a" * 700, b"b" * 10, b"", b"c" * 3000]
        blob = b"".join(cipher.encrypt_iter(pieces, km, "res-00000001", 1024))
        assert cipher.decrypt_bytes(blob, km) == b"".join(pieces)

    def test_wrong_key_fails(self):
        blob = cipher.encrypt_bytes(b"secret", generate_key_material(), "res-00000001")
        with pytest.raises(cipher.CorruptCiphertext, match="Authentication failed"):
            cipher.decrypt_bytes(blob, generate_key_material())

    def test_flipped_byte_fails(self):
        km = generate_key_material()
        blob = bytearray(cipher.encrypt_bytes(b"x" * 3000, km, "res-00000001", chunk_size=1024))
        blob[-20] ^= 0x01
        with pytest.raises(cipher.CorruptCiphertext):
            cipher.decrypt_bytes(bytes(blob), km)

    def test_truncation_at_chunk_boundary_detected(self):
        """Dropping the final chunk is detected even though every remaining chunk authenticates."""
        km = generate_key_material()
        frames = list(cipher.encrypt_iter([b"x" * 3000], km, "res-00000001", 1024))
        truncated = b"".join(frames[:-1])
        with pytest.raises(cipher.CorruptCiphertext, match="truncated"):
            cipher.decrypt_bytes(truncated, km)

    def test_trailing_data_detected(self):
        km = generate_key_material()
        blob = cipher.encrypt_bytes(b"abc", km, "res-00000001")
        with pytest.raises(cipher.CorruptCiphertext, match="after final"):
            cipher.decrypt_bytes(blob + b"\x00\x00\x00\x00\x20" + bytes(32), km)

    def test_chunks_cannot_move_between_resources(self):
        """A header rewritten to another resource id no longer authenticates."""
        km = generate_key_material()
        frames = list(cipher.encrypt_iter([b"abc"], km, "res-00000001", 1024))
        forged_header = cipher.encode_header({"resource_id": "res-00000002", "chunk_size": 1024})
        with pytest.raises(cipher.CorruptCiphertext):
            cipher.decrypt_bytes(forged_header + b"".join(frames[1:]), km)

    def test_not_a_container(self):
        with pytest.raises(cipher.CorruptCiphertext, match="Not an offline resource container"):
            cipher.decrypt_bytes(b"plain old file", generate_key_material())


class TestFileStreaming:
    """Test file-based helpers used by the CLI."""

    def test_encrypt_decrypt_stream(self, tmp_path):
        src = tmp_path / "sample.bin"
        data = b"\x00\x01\x02hello world!" * 300
        src.write_bytes(data)
        km = generate_key_material()

        encrypted = tmp_path / "sample.bin.odrm"
        written = cipher.encrypt_stream(str(src), str(encrypted), km, "res-00000001", chunk_size=1024)
        assert written == encrypted.stat().st_size

        decrypted = tmp_path / "sample.bin.dec"
        meta = cipher.decrypt_stream(str(encrypted), str(decrypted), km)

        assert decrypted.read_bytes() == data
        assert meta.get("filename") == "sample.bin"

    def test_decrypt_stream_removes_partial_output(self, tmp_path):
        src = tmp_path / "sample.bin"
        src.write_bytes(b"y" * 4000)
        km = generate_key_material()
        encrypted = tmp_path / "sample.odrm"
        cipher.encrypt_stream(str(src), str(encrypted), km, "res-00000001", chunk_size=1024)
        encrypted.write_bytes(encrypted.read_bytes()[:-10])

        out = tmp_path / "out.dec"
        with pytest.raises(cipher.CorruptCiphertext):
            cipher.decrypt_stream(str(encrypted), str(out), km)
        assert not out.exists()
