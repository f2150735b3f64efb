"""
Unit tests for the native chunked format and the legacy codecs.

Legacy readers are exercised on handcrafted byte streams.
"""

import io
import struct

import numpy as np
import pytest

import ffutils_format
from ffutils_format import (
    FASTTEXT_MAGIC,
    MAGIC,
    EmbeddingFormat,
    read_embeddings,
    read_metadata,
    write_embeddings,
)
from ffutils_model import (
    BucketSubwordVocab,
    CorruptData,
    DenseStorage,
    DuplicateEntry,
    Embeddings,
    ExplicitSubwordVocab,
    FastTextIndexer,
    IoFailure,
    QuantizedStorage,
    SimpleVocab,
    ngrams,
)


def to_bytes(embeddings, fmt="finalfusion", unnormalize=False) -> bytes:
    buf = io.BytesIO()
    write_embeddings(embeddings, buf, fmt, unnormalize)
    return buf.getvalue()


def from_bytes(data: bytes, fmt="finalfusion", lossy=False):
    return read_embeddings(io.BytesIO(data), fmt, lossy)


def with_unknown_chunk(data: bytes) -> bytes:
    """Insert a 16-byte chunk with identifier 99 before all other chunks."""
    (n_chunks,) = struct.unpack_from("<I", data, 8)
    ids_end = 12 + 4 * n_chunks
    header = MAGIC + struct.pack("<III", 0, n_chunks + 1, 99) + data[12:ids_end]
    unknown = struct.pack("<IQ", 99, 16) + b"\xab" * 16
    return header + unknown + data[ids_end:]


def with_metadata_chunk(data: bytes, payload: bytes) -> bytes:
    """Insert a metadata chunk holding ``payload`` before all other chunks."""
    payload += b"\n" * (-len(payload) % 16)
    (n_chunks,) = struct.unpack_from("<I", data, 8)
    ids_end = 12 + 4 * n_chunks
    header = MAGIC + struct.pack("<III", 0, n_chunks + 1, 5) + data[12:ids_end]
    chunk = struct.pack("<IQ", 5, len(payload)) + payload
    return header + chunk + data[ids_end:]


def fasttext_bytes(words, dim, bucket, minn, maxn, matrix, quant_input=False) -> bytes:
    out = struct.pack("<ii", FASTTEXT_MAGIC, 12)
    out += struct.pack("<12id", dim, 5, 5, 1, 5, 1, 1, 1, bucket, minn, maxn, 100, 1e-4)
    out += struct.pack("<iiiqq", len(words), len(words), 0, 1000, -1)
    for w in words:
        out += w.encode("utf-8") + b"\x00" + struct.pack("<qb", 10, 0)
    out += struct.pack("<?", quant_input)
    out += struct.pack("<qq", *matrix.shape)
    out += np.asarray(matrix, dtype="<f4").tobytes()
    return out


class TestFinalfusionRoundTrip:
    def test_dense_with_norms_and_metadata(self, random_embeddings):
        loaded = from_bytes(to_bytes(random_embeddings))
        assert loaded.vocab == random_embeddings.vocab
        np.testing.assert_array_equal(loaded.storage.matrix, random_embeddings.storage.matrix)
        np.testing.assert_array_equal(loaded.norms, random_embeddings.norms)
        assert loaded.metadata == {"corpus": "random"}

    def test_without_norms_or_metadata(self):
        emb = Embeddings(SimpleVocab(["x", "y"]), DenseStorage(np.eye(2)))
        loaded = from_bytes(to_bytes(emb))
        assert loaded.norms is None
        assert loaded.metadata is None

    def test_bucket_subword_vocab(self, subword_embeddings):
        loaded = from_bytes(to_bytes(subword_embeddings))
        assert loaded.vocab == subword_embeddings.vocab
        np.testing.assert_array_equal(loaded.storage.matrix, subword_embeddings.storage.matrix)

    def test_fasttext_and_explicit_vocabs(self):
        for vocab in (
            BucketSubwordVocab(["ab", "c"], 2, 3, FastTextIndexer(5)),
            ExplicitSubwordVocab(["ab", "c"], ["<a", "ab", "b>"], 2, 2, [0, 1, 0]),
        ):
            matrix = np.arange(vocab.vocab_len * 2, dtype=np.float32).reshape(-1, 2)
            loaded = from_bytes(to_bytes(Embeddings(vocab, DenseStorage(matrix))))
            assert loaded.vocab == vocab
            np.testing.assert_array_equal(loaded.storage.matrix, matrix)

    def test_quantized_with_projection(self):
        rng = np.random.default_rng(1)
        projection, _ = np.linalg.qr(rng.normal(size=(4, 4)))
        storage = QuantizedStorage(
            rng.normal(size=(2, 16, 2)), rng.integers(0, 16, size=(3, 2)), projection
        )
        emb = Embeddings(SimpleVocab(["a", "b", "c"]), storage, np.ones(3))
        loaded = from_bytes(to_bytes(emb))
        assert isinstance(loaded.storage, QuantizedStorage)
        np.testing.assert_array_equal(loaded.storage.codes, storage.codes)
        np.testing.assert_array_equal(loaded.storage.codebooks, storage.codebooks)
        np.testing.assert_array_equal(loaded.storage.projection, storage.projection)

    def test_unicode_words(self):
        emb = Embeddings(SimpleVocab(["Straße", "日本"]), DenseStorage(np.eye(2)))
        assert from_bytes(to_bytes(emb)).vocab.words == ["Straße", "日本"]

    def test_path_and_mmap(self, tmp_path, random_embeddings):
        path = tmp_path / "emb.fifu"
        write_embeddings(random_embeddings, path)
        loaded = read_embeddings(path, "finalfusion_mmap")
        assert isinstance(loaded.storage.matrix, np.memmap)
        np.testing.assert_array_equal(
            np.asarray(loaded.storage.matrix), random_embeddings.storage.matrix
        )
        assert list(tmp_path.glob("*.tmp")) == []

    def test_mmap_requires_path(self, random_embeddings):
        with pytest.raises(ValueError):
            read_embeddings(io.BytesIO(to_bytes(random_embeddings)), "finalfusion_mmap")


class TestFinalfusionReading:
    def test_unknown_chunk_is_skipped(self, random_embeddings):
        loaded = from_bytes(with_unknown_chunk(to_bytes(random_embeddings)))
        assert loaded.vocab == random_embeddings.vocab
        np.testing.assert_array_equal(loaded.storage.matrix, random_embeddings.storage.matrix)

    def test_unknown_chunk_skipped_from_file(self, tmp_path, random_embeddings):
        path = tmp_path / "extra.fifu"
        path.write_bytes(with_unknown_chunk(to_bytes(random_embeddings)))
        assert read_embeddings(path).vocab == random_embeddings.vocab

    def test_bad_magic(self):
        with pytest.raises(CorruptData) as exc:
            from_bytes(b"NOPE" + b"\x00" * 32)
        assert exc.value.offset == 0

    def test_truncated_stream_reports_offset(self, random_embeddings):
        data = to_bytes(random_embeddings)[:-5]
        with pytest.raises(CorruptData) as exc:
            from_bytes(data)
        assert 0 < exc.value.offset <= len(data)

    def test_truncated_inside_vocab(self, random_embeddings):
        data = to_bytes(random_embeddings)[:40]
        with pytest.raises(CorruptData):
            from_bytes(data)

    def test_read_metadata_only(self, tmp_path, random_embeddings):
        path = tmp_path / "emb.fifu"
        write_embeddings(random_embeddings, path)
        assert read_metadata(path) == {"corpus": "random"}

    def test_read_metadata_stops_early(self, random_embeddings):
        data = to_bytes(random_embeddings)
        # Everything after the metadata chunk is garbage; it must not be read.
        (n_chunks,) = struct.unpack_from("<I", data, 8)
        meta_at = 12 + 4 * n_chunks
        (length,) = struct.unpack_from("<Q", data, meta_at + 4)
        cut = meta_at + 12 + length
        assert read_metadata(io.BytesIO(data[:cut] + b"\xff" * 3)) == {"corpus": "random"}

    def test_read_metadata_absent(self):
        emb = Embeddings(SimpleVocab(["x"]), DenseStorage(np.ones((1, 2))))
        assert read_metadata(io.BytesIO(to_bytes(emb))) is None

    def test_toml_metadata_chunk(self):
        emb = Embeddings(SimpleVocab(["x", "y"]), DenseStorage(np.eye(2)))
        payload = b'corpus = "wiki"\ndims = 300\n\n[training]\nepochs = 5\n'
        loaded = from_bytes(with_metadata_chunk(to_bytes(emb), payload))
        assert loaded.metadata == {"corpus": "wiki", "dims": 300, "training": {"epochs": 5}}
        np.testing.assert_array_equal(loaded.storage.matrix, np.eye(2))

    def test_metadata_written_as_toml(self):
        emb = Embeddings(
            SimpleVocab(["x"]), DenseStorage(np.ones((1, 2))), None, {"corpus": "wiki"}
        )
        data = to_bytes(emb)
        (n_chunks,) = struct.unpack_from("<I", data, 8)
        meta_at = 12 + 4 * n_chunks
        chunk_id, length = struct.unpack_from("<IQ", data, meta_at)
        assert chunk_id == 5
        assert data[meta_at + 12 : meta_at + 12 + length] == b'corpus = "wiki"\n'

    def test_invalid_toml_metadata(self):
        emb = Embeddings(SimpleVocab(["x"]), DenseStorage(np.ones((1, 2))))
        with pytest.raises(CorruptData):
            from_bytes(with_metadata_chunk(to_bytes(emb), b"corpus: [unclosed\n"))

    def test_unwritable_metadata(self):
        emb = Embeddings(SimpleVocab(["x"]), DenseStorage(np.ones((1, 2))), None, {"k": None})
        with pytest.raises(ValueError):
            to_bytes(emb)

    def test_missing_file_is_io_failure(self, tmp_path):
        with pytest.raises(IoFailure):
            read_embeddings(tmp_path / "missing.fifu")


class TestAtomicWrite:
    def test_failed_write_leaves_no_output(self, tmp_path, monkeypatch, random_embeddings):
        def boom(embeddings, f):
            f.write(b"partial")
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(ffutils_format, "write_finalfusion", boom)
        target = tmp_path / "out.fifu"
        with pytest.raises(RuntimeError):
            write_embeddings(random_embeddings, target)
        assert list(tmp_path.iterdir()) == []

    def test_failed_write_keeps_previous_file(self, tmp_path, monkeypatch, random_embeddings):
        target = tmp_path / "out.fifu"
        target.write_bytes(b"previous")

        def boom(embeddings, f):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(ffutils_format, "write_finalfusion", boom)
        with pytest.raises(RuntimeError):
            write_embeddings(random_embeddings, target)
        assert target.read_bytes() == b"previous"

    def test_overlapping_writers_use_distinct_temp_files(self, tmp_path):
        target = tmp_path / "out.fifu"
        with ffutils_format.atomic_output(target) as first:
            with ffutils_format.atomic_output(target) as second:
                assert first.name != second.name
                first.write(b"first")
                second.write(b"second")
            assert target.read_bytes() == b"second"
        assert target.read_bytes() == b"first"
        assert list(tmp_path.iterdir()) == [target]

    def test_fasttext_not_writable(self, random_embeddings):
        with pytest.raises(ValueError):
            to_bytes(random_embeddings, "fasttext")


class TestWord2Vec:
    W2V = (
        b"2 3\n"
        + b"cat " + struct.pack("<3f", 3.0, 0.0, 4.0) + b"\n"
        + b"dog " + struct.pack("<3f", 0.0, 2.0, 0.0) + b"\n"
    )

    def test_read_handcrafted(self):
        emb = from_bytes(self.W2V, "word2vec")
        assert emb.vocab.words == ["cat", "dog"]
        np.testing.assert_allclose(emb.norms, [5.0, 2.0])
        np.testing.assert_allclose(emb.storage.row(0), [0.6, 0.0, 0.8], rtol=1e-6)
        np.testing.assert_allclose(emb.storage.row(1), [0.0, 1.0, 0.0])

    def test_roundtrip_unnormalized(self):
        emb = from_bytes(self.W2V, "word2vec")
        data = to_bytes(emb, "word2vec", unnormalize=True)
        assert data.startswith(b"2 3\ncat ")
        again = from_bytes(data, "word2vec")
        np.testing.assert_allclose(again.norms, [5.0, 2.0], rtol=1e-6)
        np.testing.assert_allclose(again.storage.matrix, emb.storage.matrix, rtol=1e-6)

    def test_truncated_vector_offset(self):
        data = b"2 3\ncat " + b"\x00" * 6
        with pytest.raises(CorruptData) as exc:
            from_bytes(data, "word2vec")
        assert exc.value.offset == 8

    def test_malformed_header(self):
        with pytest.raises(CorruptData) as exc:
            from_bytes(b"two three\n", "word2vec")
        assert exc.value.offset == 0

    def test_invalid_utf8(self):
        data = b"1 2\n\xff\xfe " + struct.pack("<2f", 1.0, 0.0)
        with pytest.raises(CorruptData) as exc:
            from_bytes(data, "word2vec")
        assert exc.value.offset == 4
        lossy = from_bytes(data, "word2vec", lossy=True)
        assert "�" in lossy.vocab.words[0]

    def test_duplicate_words(self):
        data = b"2 1\n" + b"a " + struct.pack("<f", 1.0) + b"\na " + struct.pack("<f", 2.0)
        with pytest.raises(DuplicateEntry):
            from_bytes(data, "word2vec")


class TestText:
    def test_read_text(self):
        emb = from_bytes(b"a 1 0\nb 0 2\n", "text")
        assert emb.vocab.words == ["a", "b"]
        np.testing.assert_allclose(emb.norms, [1.0, 2.0])

    def test_component_count_mismatch_offset(self):
        with pytest.raises(CorruptData) as exc:
            from_bytes(b"a 1 0\nb 0 2 3\n", "text")
        assert exc.value.offset == 6

    def test_textdims_header_checked(self):
        with pytest.raises(CorruptData):
            from_bytes(b"3 2\na 1 0\nb 0 2\n", "textdims")

    def test_textdims_roundtrip(self, random_embeddings):
        data = to_bytes(random_embeddings, "textdims", unnormalize=True)
        assert data.startswith(b"64 8\n")
        again = from_bytes(data, "textdims")
        assert again.vocab == random_embeddings.vocab
        np.testing.assert_allclose(again.norms, random_embeddings.norms, rtol=1e-5)
        np.testing.assert_allclose(
            again.storage.matrix, random_embeddings.storage.matrix, rtol=1e-5, atol=1e-6
        )

    def test_text_from_quantized_storage(self):
        storage = QuantizedStorage(np.array([[[1.0], [2.0]]]), np.array([[0], [1]]))
        emb = Embeddings(SimpleVocab(["a", "b"]), storage)
        assert to_bytes(emb, "text") == b"a 1.0\nb 2.0\n"


class TestFastText:
    def test_read_handcrafted(self):
        rng = np.random.default_rng(2)
        words = ["ab", "b"]
        matrix = rng.normal(size=(2 + 5, 3)).astype(np.float32)
        emb = from_bytes(fasttext_bytes(words, 3, 5, 2, 3, matrix), "fasttext")

        assert isinstance(emb.vocab, BucketSubwordVocab)
        assert emb.vocab.indexer == FastTextIndexer(5)
        indexer = FastTextIndexer(5)
        rows = [0] + [2 + indexer.index_ngram(g) for g in ngrams("ab", 2, 3)]
        expected = matrix[rows].mean(axis=0)
        np.testing.assert_allclose(emb.norms[0], np.linalg.norm(expected), rtol=1e-5)
        np.testing.assert_allclose(
            emb.storage.row(0), expected / np.linalg.norm(expected), rtol=1e-5, atol=1e-6
        )
        np.testing.assert_array_equal(emb.storage.matrix[2:], matrix[2:])

    def test_without_subwords(self):
        matrix = np.eye(2, dtype=np.float32) * 2
        emb = from_bytes(fasttext_bytes(["x", "y"], 2, 0, 0, 0, matrix), "fasttext")
        assert isinstance(emb.vocab, SimpleVocab)
        np.testing.assert_allclose(emb.norms, [2.0, 2.0])

    def test_quantized_model_rejected(self):
        matrix = np.zeros((3, 2), dtype=np.float32)
        with pytest.raises(CorruptData):
            from_bytes(fasttext_bytes(["x"], 2, 2, 2, 3, matrix, quant_input=True), "fasttext")

    def test_bad_magic(self):
        with pytest.raises(CorruptData) as exc:
            from_bytes(struct.pack("<ii", 1, 12), "fasttext")
        assert exc.value.offset == 0

    def test_matrix_shape_checked(self):
        matrix = np.zeros((4, 2), dtype=np.float32)
        with pytest.raises(CorruptData):
            from_bytes(fasttext_bytes(["x"], 2, 2, 2, 3, matrix), "fasttext")


class TestFormatNames:
    def test_parse(self):
        assert EmbeddingFormat.parse("textdims") is EmbeddingFormat.TEXTDIMS
        with pytest.raises(ValueError):
            EmbeddingFormat.parse("glove")
