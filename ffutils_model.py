"""
ffutils_model - Shared foundation for ffutils.

Config, error kinds, subword n-gram hashing, vocabularies,
storage (dense + product-quantized) and the Embeddings container.

Every vocabulary and storage variant carries the chunk identifier it is
serialized under, so the codec can dispatch on it without type switches.
The hashing parameters of subword vocabularies live on the vocabulary
itself and are written into the file; there is no process-wide hashing
state.

This module has zero dependency on the codec (ffutils_format.py),
the trainer / query engine (ffutils.py) or the command line (ffutils_cli.py).
"""

from __future__ import annotations

from dataclasses import dataclass, asdict, fields
from enum import IntEnum
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol, Union, runtime_checkable

import numpy as np
import yaml


# ── Errors ─────────────────────────────────────────────────────────


class EmbeddingError(Exception):
    """Base class for every failure raised by ffutils."""


class DuplicateEntry(EmbeddingError, ValueError):
    def __init__(self, entry: str, kind: str = "word"):
        super().__init__(f"Duplicate {kind} in vocabulary: {entry!r}")
        self.entry = entry
        self.kind = kind


class InvalidSubspaceCount(EmbeddingError, ValueError):
    def __init__(self, dims: int, n_subquantizers: int):
        super().__init__(
            f"{dims} dimensions cannot be split into "
            f"{n_subquantizers} equal subspaces"
        )
        self.dims = dims
        self.n_subquantizers = n_subquantizers


class CorruptData(EmbeddingError):
    """Format violation while reading; ``offset`` is where validation failed."""

    def __init__(self, message: str, offset: int):
        super().__init__(f"{message} (at byte offset {offset})")
        self.offset = offset


class UnknownWord(EmbeddingError, LookupError):
    """No row and no resolvable n-gram for one or more query words."""

    def __init__(self, words: Union[str, Iterable[str]]):
        self.words = [words] if isinstance(words, str) else list(words)
        super().__init__(f"Cannot compute embedding(s) for: {', '.join(self.words)}")


class DimensionMismatch(EmbeddingError, ValueError):
    def __init__(self, expected: int, got: int, what: str = "vector"):
        super().__init__(f"{what}: expected {expected}, got {got}")
        self.expected = expected
        self.got = got


class IoFailure(EmbeddingError, OSError):
    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path


# ── Config ─────────────────────────────────────────────────────────


@dataclass
class Config:
    n_threads: int = 0  # 0 = one worker per hardware thread
    block_size: int = 65536
    neighbors: int = 10
    similarity: str = "cosine"
    quantizer: str = "pq"
    n_subquantizers: Optional[int] = None  # None = dims / 2
    quantizer_bits: int = 8
    n_iterations: int = 100
    n_attempts: int = 1
    n_samples: Optional[int] = None
    seed: int = 42
    log_interval: int = 10000

    def save(self, path: str):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(asdict(self), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls, path: str) -> Config:
        if not Path(path).exists():
            raise FileNotFoundError(f"Config not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config {path} is not a key/value document")
        valid = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in valid})


# ── Chunk Identifiers ──────────────────────────────────────────────


class ChunkIdentifier(IntEnum):
    SIMPLE_VOCAB = 1
    NDARRAY = 2
    BUCKET_SUBWORD_VOCAB = 3
    QUANTIZED_ARRAY = 4
    METADATA = 5
    NDNORMS = 6
    FASTTEXT_SUBWORD_VOCAB = 7
    EXPLICIT_SUBWORD_VOCAB = 8


# ── Subword N-grams ────────────────────────────────────────────────

BOW, EOW = "<", ">"

_FNV64_OFFSET, _FNV64_PRIME = 0xCBF29CE484222325, 0x100000001B3
_FNV32_OFFSET, _FNV32_PRIME = 2166136261, 16777619
_MASK64, _MASK32 = (1 << 64) - 1, (1 << 32) - 1


def ngrams(word: str, min_n: int, max_n: int) -> list[str]:
    """Character n-grams of ``<word>``, by start position then length.

    A 1-gram that is only a boundary marker is never produced.
    """
    chars = BOW + word + EOW
    n_chars = len(chars)
    out = []
    for i in range(n_chars):
        for n in range(min_n, max_n + 1):
            j = i + n
            if j > n_chars:
                break
            if n == 1 and (i == 0 or j == n_chars):
                continue
            out.append(chars[i:j])
    return out


def fnv1a64(data: bytes) -> int:
    h = _FNV64_OFFSET
    for b in data:
        h ^= b
        h = (h * _FNV64_PRIME) & _MASK64
    return h


def fasttext_hash(data: bytes) -> int:
    """fastText's FNV-1a: bytes are sign-extended (int8 → uint32) before xor."""
    h = _FNV32_OFFSET
    for b in data:
        h ^= (b - 256 if b > 127 else b) & _MASK32
        h = (h * _FNV32_PRIME) & _MASK32
    return h


class FinalfusionHashIndexer:
    """FNV-1a 64 of the UTF-8 n-gram, masked to ``bucket_exp`` bits."""

    chunk_id = ChunkIdentifier.BUCKET_SUBWORD_VOCAB

    def __init__(self, bucket_exp: int):
        if not 0 < bucket_exp <= 64:
            raise ValueError(f"bucket_exp must be in [1, 64], was {bucket_exp}")
        self.bucket_exp = bucket_exp
        self.n_buckets = 1 << bucket_exp

    def index_ngram(self, ngram: str) -> int:
        return fnv1a64(ngram.encode("utf-8")) & (self.n_buckets - 1)

    def __eq__(self, other):
        return (
            isinstance(other, FinalfusionHashIndexer)
            and other.bucket_exp == self.bucket_exp
        )

    def __repr__(self):
        return f"FinalfusionHashIndexer(bucket_exp={self.bucket_exp})"


class FastTextIndexer:
    chunk_id = ChunkIdentifier.FASTTEXT_SUBWORD_VOCAB

    def __init__(self, n_buckets: int):
        if n_buckets <= 0:
            raise ValueError(f"n_buckets must be positive, was {n_buckets}")
        self.n_buckets = n_buckets

    def index_ngram(self, ngram: str) -> int:
        return fasttext_hash(ngram.encode("utf-8")) % self.n_buckets

    def __eq__(self, other):
        return isinstance(other, FastTextIndexer) and other.n_buckets == self.n_buckets

    def __repr__(self):
        return f"FastTextIndexer(n_buckets={self.n_buckets})"


Indexer = Union[FinalfusionHashIndexer, FastTextIndexer]


# ── Vocabularies ───────────────────────────────────────────────────


def _index_entries(entries: list[str], kind: str) -> dict[str, int]:
    index: dict[str, int] = {}
    for i, entry in enumerate(entries):
        if index.setdefault(entry, i) != i:
            raise DuplicateEntry(entry, kind)
    return index


class SimpleVocab:
    chunk_id = ChunkIdentifier.SIMPLE_VOCAB
    subwords = False

    def __init__(self, words: Iterable[str]):
        self.words = list(words)
        self._index = _index_entries(self.words, "word")

    @property
    def words_len(self) -> int:
        return len(self.words)

    @property
    def vocab_len(self) -> int:
        return len(self.words)

    def index_of(self, word: str) -> Optional[int]:
        return self._index.get(word)

    def __len__(self) -> int:
        return len(self.words)

    def __contains__(self, word) -> bool:
        return word in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(self.words)

    def __eq__(self, other):
        return type(other) is type(self) and other.words == self.words


class SubwordVocab(SimpleVocab):
    """Words plus character n-grams in ``[min_n, max_n]``.

    N-gram rows follow the word rows in storage, so every index handed
    out by ``ngrams_of`` is an absolute storage row.
    """

    subwords = True

    def __init__(self, words: Iterable[str], min_n: int, max_n: int):
        if min_n < 1 or max_n < min_n:
            raise ValueError(f"Invalid n-gram range: [{min_n}, {max_n}]")
        super().__init__(words)
        self.min_n = min_n
        self.max_n = max_n

    def _ngram_index(self, ngram: str) -> Optional[int]:
        raise NotImplementedError

    def ngrams_of(self, word: str) -> list[tuple[str, int]]:
        offset = self.words_len
        out = []
        for ngram in ngrams(word, self.min_n, self.max_n):
            idx = self._ngram_index(ngram)
            if idx is not None:
                out.append((ngram, offset + idx))
        return out

    def subword_indices(self, word: str) -> list[int]:
        return [idx for _, idx in self.ngrams_of(word)]


class BucketSubwordVocab(SubwordVocab):
    def __init__(self, words: Iterable[str], min_n: int, max_n: int, indexer: Indexer):
        super().__init__(words, min_n, max_n)
        self.indexer = indexer

    @property
    def chunk_id(self) -> ChunkIdentifier:
        return self.indexer.chunk_id

    @property
    def vocab_len(self) -> int:
        return self.words_len + self.indexer.n_buckets

    def _ngram_index(self, ngram: str) -> Optional[int]:
        return self.indexer.index_ngram(ngram)

    def __eq__(self, other):
        return (
            isinstance(other, BucketSubwordVocab)
            and other.words == self.words
            and (other.min_n, other.max_n) == (self.min_n, self.max_n)
            and other.indexer == self.indexer
        )


class ExplicitSubwordVocab(SubwordVocab):
    """N-grams with explicit indices; several n-grams may share one row."""

    chunk_id = ChunkIdentifier.EXPLICIT_SUBWORD_VOCAB

    def __init__(
        self,
        words: Iterable[str],
        ngrams: Iterable[str],
        min_n: int,
        max_n: int,
        ngram_indices: Optional[Iterable[int]] = None,
    ):
        super().__init__(words, min_n, max_n)
        self.ngrams = list(ngrams)
        _index_entries(self.ngrams, "n-gram")
        if ngram_indices is None:
            self.ngram_indices = list(range(len(self.ngrams)))
        else:
            self.ngram_indices = [int(i) for i in ngram_indices]
        if len(self.ngram_indices) != len(self.ngrams):
            raise ValueError(
                f"{len(self.ngrams)} n-grams but {len(self.ngram_indices)} indices"
            )
        if self.ngram_indices and min(self.ngram_indices) < 0:
            raise ValueError("N-gram indices must be non-negative")
        self._ngram_map = dict(zip(self.ngrams, self.ngram_indices))
        self.n_ngram_rows = max(self.ngram_indices) + 1 if self.ngram_indices else 0

    @property
    def vocab_len(self) -> int:
        return self.words_len + self.n_ngram_rows

    def _ngram_index(self, ngram: str) -> Optional[int]:
        return self._ngram_map.get(ngram)

    def __eq__(self, other):
        return (
            isinstance(other, ExplicitSubwordVocab)
            and other.words == self.words
            and other.ngrams == self.ngrams
            and other.ngram_indices == self.ngram_indices
            and (other.min_n, other.max_n) == (self.min_n, self.max_n)
        )


Vocab = Union[SimpleVocab, BucketSubwordVocab, ExplicitSubwordVocab]


# ── Storage ────────────────────────────────────────────────────────


@runtime_checkable
class Storage(Protocol):
    """Structural interface consumed by the query engine and the codec."""

    chunk_id: ChunkIdentifier

    @property
    def shape(self) -> tuple[int, int]: ...

    @property
    def dims(self) -> int: ...

    def row(self, i: int) -> np.ndarray: ...
    def rows_at(self, indices) -> np.ndarray: ...
    def dot(self, query: np.ndarray, i: int) -> float: ...
    def scores(self, query: np.ndarray, start: int = 0, end: int = None) -> np.ndarray: ...


def _as_query(query, dims: int) -> np.ndarray:
    q = np.asarray(query, dtype=np.float32)
    if q.shape != (dims,):
        raise DimensionMismatch(dims, q.shape[-1] if q.ndim else 0, "query dims")
    return q


def _row_dots(block: np.ndarray, q: np.ndarray) -> np.ndarray:
    """Dot every row of ``block`` with ``q``, summing components in column order.

    A row's score depends only on that row, never on how many rows share
    the block, so any block split gives the same floats as a full scan.
    """
    cols = np.asfortranarray(block, dtype=np.float32)
    out = np.zeros(len(cols), dtype=np.float32)
    for j in range(cols.shape[1]):
        out += cols[:, j] * q[j]
    return out


class DenseStorage:
    """Row-major float32 matrix; may be a read-only memory map."""

    chunk_id = ChunkIdentifier.NDARRAY

    def __init__(self, matrix: np.ndarray):
        if not isinstance(matrix, np.memmap):
            matrix = np.asarray(matrix, dtype=np.float32)
        if matrix.ndim != 2:
            raise ValueError(f"Embedding matrix must be 2-D (got {matrix.ndim}-D)")
        self.matrix = matrix

    @property
    def shape(self) -> tuple[int, int]:
        return self.matrix.shape

    @property
    def dims(self) -> int:
        return self.matrix.shape[1]

    def row(self, i: int) -> np.ndarray:
        return np.array(self.matrix[i], dtype=np.float32)

    def rows_at(self, indices) -> np.ndarray:
        idx = np.asarray(indices, dtype=np.int64)
        return np.array(self.matrix[idx], dtype=np.float32)

    def dot(self, query: np.ndarray, i: int) -> float:
        return float(_row_dots(self.matrix[i : i + 1], _as_query(query, self.dims))[0])

    def scores(self, query: np.ndarray, start: int = 0, end: int = None) -> np.ndarray:
        return _row_dots(self.matrix[start:end], _as_query(query, self.dims))


class QuantizedStorage:
    """Product-quantized rows: ``codes[i, j]`` picks a centroid of subspace j.

    With a projection (OPQ), codebooks live in the rotated space:
    a row is reconstructed as ``concat(centroids) @ projection.T`` and a
    query is rotated by ``projection`` before scoring.
    """

    chunk_id = ChunkIdentifier.QUANTIZED_ARRAY

    def __init__(
        self,
        codebooks: np.ndarray,
        codes: np.ndarray,
        projection: Optional[np.ndarray] = None,
    ):
        self.codebooks = np.ascontiguousarray(codebooks, dtype=np.float32)
        self.codes = np.ascontiguousarray(codes, dtype=np.uint8)
        if self.codebooks.ndim != 3:
            raise ValueError("Codebooks must have shape (subquantizers, centroids, dims)")
        if self.codes.ndim != 2:
            raise ValueError("Codes must have shape (rows, subquantizers)")
        m, k, _ = self.codebooks.shape
        if self.codes.shape[1] != m:
            raise DimensionMismatch(m, self.codes.shape[1], "subquantizers in codes")
        if k > 256:
            raise ValueError(f"At most 256 centroids fit in a byte code, got {k}")
        if projection is not None:
            projection = np.ascontiguousarray(projection, dtype=np.float32)
            if projection.shape != (self.dims, self.dims):
                raise DimensionMismatch(self.dims, projection.shape[0], "projection dims")
        self.projection = projection

    @property
    def n_subquantizers(self) -> int:
        return self.codebooks.shape[0]

    @property
    def n_centroids(self) -> int:
        return self.codebooks.shape[1]

    @property
    def sub_dims(self) -> int:
        return self.codebooks.shape[2]

    @property
    def dims(self) -> int:
        return self.codebooks.shape[0] * self.codebooks.shape[2]

    @property
    def shape(self) -> tuple[int, int]:
        return self.codes.shape[0], self.dims

    def decode(self, codes: np.ndarray) -> np.ndarray:
        codes = np.asarray(codes, dtype=np.intp)
        m = self.n_subquantizers
        parts = self.codebooks[np.arange(m)[None, :], codes]
        out = parts.reshape(len(codes), self.dims)
        if self.projection is not None:
            out = out @ self.projection.T
        return out.astype(np.float32, copy=False)

    def lookup_table(self, query: np.ndarray) -> np.ndarray:
        """(subquantizers, centroids) partial inner products of the query."""
        q = _as_query(query, self.dims)
        if self.projection is not None:
            q = q @ self.projection
        sub = q.reshape(self.n_subquantizers, self.sub_dims)
        return np.einsum("mkd,md->mk", self.codebooks, sub).astype(np.float32)

    def _sum_codes(self, table: np.ndarray, codes: np.ndarray) -> np.ndarray:
        # Fixed subspace order keeps dot() and scores() bit-identical.
        out = np.zeros(len(codes), dtype=np.float32)
        for j in range(self.n_subquantizers):
            out += table[j, codes[:, j]]
        return out

    def row(self, i: int) -> np.ndarray:
        return self.decode(self.codes[i : i + 1])[0]

    def rows_at(self, indices) -> np.ndarray:
        return self.decode(self.codes[np.asarray(indices, dtype=np.int64)])

    def dot(self, query: np.ndarray, i: int) -> float:
        table = self.lookup_table(query)
        return float(self._sum_codes(table, self.codes[i : i + 1])[0])

    def scores(self, query: np.ndarray, start: int = 0, end: int = None) -> np.ndarray:
        return self._sum_codes(self.lookup_table(query), self.codes[start:end])

    def reconstruct(self) -> DenseStorage:
        return DenseStorage(self.decode(self.codes))


# ── Normalization ──────────────────────────────────────────────────


def l2_normalize(v: np.ndarray) -> float:
    """Normalize in place; zero vectors are left untouched."""
    norm = float(np.sqrt(np.dot(v, v)))
    if norm != 0.0:
        v /= norm
    return norm


def l2_normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Normalize every row in place, returning the original norms."""
    norms = np.sqrt(np.einsum("ij,ij->i", matrix, matrix)).astype(np.float32)
    nonzero = norms != 0
    matrix[nonzero] /= norms[nonzero, None]
    return norms


# ── Embeddings ─────────────────────────────────────────────────────


class Embeddings:
    """A vocabulary, its storage, optional norms and optional metadata.

    Treated as immutable: every transform builds a new instance.
    """

    def __init__(
        self,
        vocab: Vocab,
        storage: Storage,
        norms: Optional[np.ndarray] = None,
        metadata: Optional[dict] = None,
    ):
        if storage.shape[0] != vocab.vocab_len:
            raise DimensionMismatch(vocab.vocab_len, storage.shape[0], "storage rows")
        if norms is not None:
            norms = np.asarray(norms, dtype=np.float32)
            if norms.shape != (vocab.words_len,):
                raise DimensionMismatch(vocab.words_len, len(norms), "norms")
        self.vocab = vocab
        self.storage = storage
        self.norms = norms
        self.metadata = metadata

    @property
    def dims(self) -> int:
        return self.storage.dims

    def __len__(self) -> int:
        return self.vocab.words_len

    def __contains__(self, word) -> bool:
        return self.vocab.index_of(word) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self.vocab.words)

    def _subword_mean(self, word: str) -> Optional[np.ndarray]:
        if not self.vocab.subwords:
            return None
        indices = self.vocab.subword_indices(word)
        if not indices:
            return None
        return self.storage.rows_at(indices).mean(axis=0).astype(np.float32)

    def embedding(self, word: str) -> Optional[np.ndarray]:
        """Row of ``word``, else the normalized mean of its n-gram rows."""
        idx = self.vocab.index_of(word)
        if idx is not None:
            return self.storage.row(idx)
        v = self._subword_mean(word)
        if v is not None:
            l2_normalize(v)
        return v

    def embedding_with_norm(self, word: str) -> Optional[tuple[np.ndarray, float]]:
        idx = self.vocab.index_of(word)
        if idx is not None:
            norm = float(self.norms[idx]) if self.norms is not None else 1.0
            return self.storage.row(idx), norm
        v = self._subword_mean(word)
        if v is None:
            return None
        return v, l2_normalize(v)

    def with_metadata(self, metadata: Optional[dict]) -> Embeddings:
        return Embeddings(self.vocab, self.storage, self.norms, metadata)
