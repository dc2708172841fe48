"""Tests for checksummed chunk reads and verified writes."""

import base64

import pytest

from errors import ChecksumMismatch, PathViolation
from transfer.chunk_transport import ChunkWriter, md5_hex, read_chunk


@pytest.fixture
def source_root(tmp_path):
    root = tmp_path / 'source'
    (root / 'uploads').mkdir(parents=True)
    (root / 'uploads' / 'video.bin').write_bytes(bytes(range(256)) * 40)
    return root


class TestReadChunk:
    """Test byte-range reads on the source."""

    def test_reads_requested_range(self, source_root):
        result = read_chunk(str(source_root), 'uploads/video.bin', start=100, end=300)

        data = base64.b64decode(result['data'])
        assert data == (bytes(range(256)) * 40)[100:300]
        assert result['bytes_read'] == 200
        assert result['checksum'] == md5_hex(data)
        assert result['file_size'] == 10240
        assert result['offset'] == 100

    def test_zero_end_reads_chunk_size(self, source_root):
        result = read_chunk(str(source_root), 'uploads/video.bin', start=0, end=0, chunk_size=1024)

        assert result['bytes_read'] == 1024

    def test_last_chunk_is_short(self, source_root):
        result = read_chunk(str(source_root), 'uploads/video.bin', start=10000, end=12000)

        assert result['bytes_read'] == 240

    def test_missing_file(self, source_root):
        with pytest.raises(FileNotFoundError):
            read_chunk(str(source_root), 'uploads/missing.bin')

    def test_traversal_rejected(self, source_root):
        with pytest.raises(PathViolation):
            read_chunk(str(source_root), '../etc/passwd')


class TestChunkWriter:
    """Test verified writes on the destination."""

    def test_assembles_file_from_chunks(self, tmp_path):
        writer = ChunkWriter(str(tmp_path))
        parts = [b'a' * 10, b'b' * 10, b'c' * 5]

        offset = 0
        for part in parts:
            offset += writer.write_chunk('uploads/big.bin', offset, part, md5_hex(part))

        assert (tmp_path / 'uploads' / 'big.bin').read_bytes() == b''.join(parts)

    def test_checksum_mismatch_writes_nothing(self, tmp_path):
        writer = ChunkWriter(str(tmp_path))

        with pytest.raises(ChecksumMismatch):
            writer.write_chunk('uploads/big.bin', 0, b'payload', md5_hex(b'other'))

        # Should not create the file at all
        assert not (tmp_path / 'uploads' / 'big.bin').exists()

    def test_checksum_mismatch_keeps_existing_bytes(self, tmp_path):
        writer = ChunkWriter(str(tmp_path))
        writer.write_chunk('a.bin', 0, b'first', md5_hex(b'first'))

        with pytest.raises(ChecksumMismatch):
            writer.write_chunk('a.bin', 5, b'second', 'deadbeef')

        assert (tmp_path / 'a.bin').read_bytes() == b'first'

    def test_offset_zero_truncates(self, tmp_path):
        writer = ChunkWriter(str(tmp_path))
        writer.write_chunk('a.bin', 0, b'old content here', md5_hex(b'old content here'))
        writer.write_chunk('a.bin', 0, b'new', md5_hex(b'new'))

        assert (tmp_path / 'a.bin').read_bytes() == b'new'

    def test_reapplied_chunk_does_not_duplicate(self, tmp_path):
        """A chunk re-requested after an interruption overwrites its own range."""
        writer = ChunkWriter(str(tmp_path))
        writer.write_chunk('a.bin', 0, b'0123', md5_hex(b'0123'))
        writer.write_chunk('a.bin', 4, b'4567', md5_hex(b'4567'))
        writer.write_chunk('a.bin', 4, b'4567', md5_hex(b'4567'))

        assert (tmp_path / 'a.bin').read_bytes() == b'01234567'

    def test_uppercase_checksum_accepted(self, tmp_path):
        writer = ChunkWriter(str(tmp_path))

        writer.write_chunk('a.bin', 0, b'data', md5_hex(b'data').upper())

        assert (tmp_path / 'a.bin').read_bytes() == b'data'

    def test_rejects_escape(self, tmp_path):
        writer = ChunkWriter(str(tmp_path / 'root'))

        with pytest.raises(PathViolation):
            writer.write_chunk('../evil.php', 0, b'x', md5_hex(b'x'))
