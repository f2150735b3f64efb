"""
ffutils_format - Embedding codecs.

Native chunked container (read, memory-mapped read, write, metadata-only
read) and the legacy word2vec binary, text, textdims and fastText binary
formats. Every reader returns an ffutils_model.Embeddings whose word rows
are L2-normalized, with the original norms kept alongside.

Offsets in CorruptData are absolute byte positions from the start of the
stream handed to the reader.
"""

from __future__ import annotations

import io, logging, os, struct, tempfile, tomllib
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

import numpy as np
import tomli_w
import torch
import torch.nn.functional as F

from ffutils_model import (
    BucketSubwordVocab,
    ChunkIdentifier,
    CorruptData,
    DenseStorage,
    DuplicateEntry,
    Embeddings,
    ExplicitSubwordVocab,
    FastTextIndexer,
    FinalfusionHashIndexer,
    IoFailure,
    QuantizedStorage,
    SimpleVocab,
    l2_normalize_rows,
)

logger = logging.getLogger(__name__)

MAGIC = b"FiFu"
MODEL_VERSION = 0
TYPE_U8 = 1
TYPE_F32 = 10
ALIGN = 16

FASTTEXT_MAGIC = 793712314
FASTTEXT_VERSION = 12

WRITE_BLOCK_ROWS = 8192

VOCAB_CHUNKS = frozenset(
    {
        ChunkIdentifier.SIMPLE_VOCAB,
        ChunkIdentifier.BUCKET_SUBWORD_VOCAB,
        ChunkIdentifier.FASTTEXT_SUBWORD_VOCAB,
        ChunkIdentifier.EXPLICIT_SUBWORD_VOCAB,
    }
)
STORAGE_CHUNKS = frozenset({ChunkIdentifier.NDARRAY, ChunkIdentifier.QUANTIZED_ARRAY})

Source = Union[str, os.PathLike, BinaryIO]


class EmbeddingFormat(Enum):
    FINALFUSION = "finalfusion"
    FINALFUSION_MMAP = "finalfusion_mmap"
    WORD2VEC = "word2vec"
    FASTTEXT = "fasttext"
    TEXT = "text"
    TEXTDIMS = "textdims"

    @classmethod
    def parse(cls, fmt: Union[str, EmbeddingFormat]) -> EmbeddingFormat:
        if isinstance(fmt, cls):
            return fmt
        try:
            return cls(fmt)
        except ValueError:
            names = ", ".join(f.value for f in cls)
            raise ValueError(f"Unknown embedding format: {fmt} (expected one of {names})") from None


# ── Binary Reading ─────────────────────────────────────────────────


def _decode(raw: bytes, lossy: bool, offset: int) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        if lossy:
            return raw.decode("utf-8", errors="replace")
        raise CorruptData(f"Invalid UTF-8: {e.reason}", offset + e.start) from e


class _Reader:
    """Little-endian reader that tracks the absolute offset of the stream."""

    def __init__(self, f: BinaryIO):
        self.f = f
        self.offset = 0

    def read(self, n: int, what: str) -> bytes:
        data = self.f.read(n)
        if len(data) != n:
            raise CorruptData(
                f"Truncated {what}: expected {n:,} bytes, got {len(data):,}", self.offset
            )
        self.offset += n
        return data

    def unpack(self, fmt: str, what: str) -> tuple:
        s = struct.Struct("<" + fmt)
        return s.unpack(self.read(s.size, what))

    def string(self, what: str, lossy: bool = False) -> str:
        (n,) = self.unpack("I", f"{what} length")
        start = self.offset
        return _decode(self.read(n, what), lossy, start)

    def until(self, delim: bytes, what: str, skip_leading: bytes = b"") -> tuple[bytes, int]:
        """Bytes up to ``delim`` (consumed, not returned) and their start offset."""
        buf = bytearray()
        start = self.offset
        while True:
            b = self.f.read(1)
            if not b:
                raise CorruptData(f"Truncated {what}", self.offset)
            self.offset += 1
            if b == delim:
                return bytes(buf), start
            if not buf and b == skip_leading:
                start = self.offset
                continue
            buf += b

    def floats(self, count: int, what: str) -> np.ndarray:
        return np.frombuffer(self.read(count * 4, what), dtype="<f4").astype(np.float32)

    def align(self):
        pad = -self.offset % ALIGN
        if pad:
            self.read(pad, "padding")

    def _file_size(self) -> Optional[int]:
        try:
            if not self.f.seekable():
                return None
            return os.fstat(self.f.fileno()).st_size
        except (AttributeError, OSError, ValueError):
            return None

    def skip(self, n: int, what: str):
        size = self._file_size()
        if size is not None:
            pos = self.f.tell()
            if pos + n > size:
                raise CorruptData(
                    f"Truncated {what}: expected {n:,} bytes, got {size - pos:,}", self.offset
                )
            self.f.seek(n, io.SEEK_CUR)
            self.offset += n
            return
        remaining = n
        while remaining:
            data = self.f.read(min(remaining, 1 << 20))
            if not data:
                raise CorruptData(f"Truncated {what}", self.offset)
            remaining -= len(data)
            self.offset += len(data)


class _Writer:
    def __init__(self, f: BinaryIO):
        self.f = f
        self.offset = 0

    def write(self, data: bytes):
        self.f.write(data)
        self.offset += len(data)

    def pack(self, fmt: str, *values):
        self.write(struct.pack("<" + fmt, *values))

    def padding(self, at: int) -> int:
        return -at % ALIGN

    def align(self):
        self.write(b"\x00" * self.padding(self.offset))


def _string(s: str) -> bytes:
    raw = s.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


# ── Native Chunks: Read ────────────────────────────────────────────


def _read_header(r: _Reader) -> list[int]:
    magic = r.read(4, "magic")
    if magic != MAGIC:
        raise CorruptData(f"Not a finalfusion file (magic {magic!r})", 0)
    (version,) = r.unpack("I", "version")
    if version != MODEL_VERSION:
        raise CorruptData(f"Unsupported model version {version}", 4)
    (n_chunks,) = r.unpack("I", "chunk count")
    if n_chunks == 0:
        raise CorruptData("File contains no chunks", 8)
    return list(r.unpack(f"{n_chunks}I", "chunk identifiers"))


def _read_vocab(r: _Reader, chunk_id: int, lossy: bool):
    start = r.offset
    try:
        if chunk_id == ChunkIdentifier.SIMPLE_VOCAB:
            (n_words,) = r.unpack("Q", "vocabulary size")
            return SimpleVocab([r.string("word", lossy) for _ in range(n_words)])

        if chunk_id == ChunkIdentifier.EXPLICIT_SUBWORD_VOCAB:
            n_words, n_ngrams, min_n, max_n = r.unpack("QQII", "explicit vocabulary header")
            words = [r.string("word", lossy) for _ in range(n_words)]
            ngrams, indices = [], []
            for _ in range(n_ngrams):
                ngrams.append(r.string("n-gram", lossy))
                indices.append(r.unpack("Q", "n-gram index")[0])
            return ExplicitSubwordVocab(words, ngrams, min_n, max_n, indices)

        n_words, min_n, max_n, param = r.unpack("QIII", "subword vocabulary header")
        words = [r.string("word", lossy) for _ in range(n_words)]
        if chunk_id == ChunkIdentifier.BUCKET_SUBWORD_VOCAB:
            indexer = FinalfusionHashIndexer(param)
        else:
            indexer = FastTextIndexer(param)
        return BucketSubwordVocab(words, min_n, max_n, indexer)
    except DuplicateEntry:
        raise
    except ValueError as e:
        raise CorruptData(f"Invalid vocabulary: {e}", start) from e


def _read_dense(r: _Reader, mmap_path: Optional[str]) -> DenseStorage:
    rows, cols, type_id = r.unpack("QII", "array header")
    if type_id != TYPE_F32:
        raise CorruptData(f"Expected f32 array (type {TYPE_F32}), got type {type_id}", r.offset - 4)
    r.align()
    if mmap_path is None:
        return DenseStorage(r.floats(rows * cols, "embedding matrix").reshape(rows, cols))
    at = r.f.tell()
    r.skip(rows * cols * 4, "embedding matrix")
    if rows * cols == 0:
        return DenseStorage(np.zeros((rows, cols), dtype=np.float32))
    matrix = np.memmap(mmap_path, dtype="<f4", mode="r", offset=at, shape=(rows, cols))
    return DenseStorage(matrix)


def _read_quantized(r: _Reader) -> QuantizedStorage:
    start = r.offset
    has_proj, m, t_f32, t_u8 = r.unpack("IIII", "quantizer header")
    (rows,) = r.unpack("Q", "quantized rows")
    k, dims = r.unpack("II", "quantizer shape")
    if t_f32 != TYPE_F32 or t_u8 != TYPE_U8:
        raise CorruptData(f"Unexpected quantizer element types ({t_f32}, {t_u8})", start + 8)
    if m == 0 or dims % m:
        raise CorruptData(f"{dims} dimensions cannot be split into {m} subquantizers", start + 4)
    if not 0 < k <= 256:
        raise CorruptData(f"Invalid centroid count {k}", start + 24)
    ds = dims // m
    r.align()
    projection = None
    if has_proj:
        projection = r.floats(dims * dims, "projection").reshape(dims, dims)
    codebooks = r.floats(m * k * ds, "codebooks").reshape(m, k, ds)
    codes_at = r.offset
    codes = np.frombuffer(r.read(rows * m, "codes"), dtype=np.uint8).reshape(rows, m)
    if codes.size and int(codes.max()) >= k:
        raise CorruptData(f"Code exceeds centroid count {k}", codes_at)
    return QuantizedStorage(codebooks, codes.copy(), projection)


def _read_norms(r: _Reader) -> np.ndarray:
    n, type_id = r.unpack("QI", "norms header")
    if type_id != TYPE_F32:
        raise CorruptData(f"Expected f32 norms, got type {type_id}", r.offset - 4)
    r.align()
    return r.floats(n, "norms")


def _read_metadata(r: _Reader, length: int, lossy: bool) -> dict:
    start = r.offset
    text = _decode(r.read(length, "metadata"), lossy, start)
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise CorruptData(f"Invalid TOML metadata: {e}", start) from e


def _read_chunks(
    r: _Reader,
    wanted: frozenset,
    mmap_path: Optional[str] = None,
    lossy: bool = False,
) -> tuple[dict[ChunkIdentifier, object], dict[ChunkIdentifier, int]]:
    """Read requested chunks, skipping others; stop after the last requested one."""
    chunk_ids = _read_header(r)
    targets = [i for i, c in enumerate(chunk_ids) if c in wanted]
    last = targets[-1] if targets else -1
    parts, offsets = {}, {}
    for pos, expected in enumerate(chunk_ids[: last + 1]):
        header_at = r.offset
        chunk_id, length = r.unpack("IQ", "chunk header")
        if chunk_id != expected:
            raise CorruptData(
                f"Chunk {chunk_id} does not match header entry {pos} ({expected})", header_at
            )
        start = r.offset
        if chunk_id not in wanted:
            logger.debug(f"Skipping chunk {chunk_id} ({length:,} bytes)")
            r.skip(length, f"chunk {chunk_id}")
            continue
        cid = ChunkIdentifier(chunk_id)
        if cid in parts or (cid in VOCAB_CHUNKS and parts.keys() & VOCAB_CHUNKS) or (
            cid in STORAGE_CHUNKS and parts.keys() & STORAGE_CHUNKS
        ):
            raise CorruptData(f"Duplicate chunk of kind {cid.name}", header_at)
        if cid in VOCAB_CHUNKS:
            parts[cid] = _read_vocab(r, cid, lossy)
        elif cid == ChunkIdentifier.NDARRAY:
            parts[cid] = _read_dense(r, mmap_path)
        elif cid == ChunkIdentifier.QUANTIZED_ARRAY:
            parts[cid] = _read_quantized(r)
        elif cid == ChunkIdentifier.NDNORMS:
            parts[cid] = _read_norms(r)
        else:
            parts[cid] = _read_metadata(r, length, lossy)
        consumed = r.offset - start
        if consumed != length:
            raise CorruptData(
                f"Chunk {cid.name} declares {length:,} bytes but {consumed:,} were read", start
            )
        offsets[cid] = start
    return parts, offsets


def read_finalfusion(
    f: BinaryIO, mmap_path: Optional[str] = None, lossy: bool = False
) -> Embeddings:
    r = _Reader(f)
    wanted = VOCAB_CHUNKS | STORAGE_CHUNKS | {ChunkIdentifier.NDNORMS, ChunkIdentifier.METADATA}
    parts, offsets = _read_chunks(r, wanted, mmap_path, lossy)

    vocab_ids = parts.keys() & VOCAB_CHUNKS
    storage_ids = parts.keys() & STORAGE_CHUNKS
    if not vocab_ids:
        raise CorruptData("File has no vocabulary chunk", r.offset)
    if not storage_ids:
        raise CorruptData("File has no storage chunk", r.offset)
    vocab = parts[next(iter(vocab_ids))]
    storage_id = next(iter(storage_ids))
    storage = parts[storage_id]
    if storage.shape[0] != vocab.vocab_len:
        raise CorruptData(
            f"Vocabulary has {vocab.vocab_len:,} entries but storage has "
            f"{storage.shape[0]:,} rows",
            offsets[storage_id],
        )
    norms = parts.get(ChunkIdentifier.NDNORMS)
    if norms is not None and len(norms) != vocab.words_len:
        raise CorruptData(
            f"Vocabulary has {vocab.words_len:,} words but {len(norms):,} norms",
            offsets[ChunkIdentifier.NDNORMS],
        )
    return Embeddings(vocab, storage, norms, parts.get(ChunkIdentifier.METADATA))


# ── Native Chunks: Write ───────────────────────────────────────────


def _vocab_payload(vocab) -> bytes:
    words = b"".join(_string(w) for w in vocab.words)
    if isinstance(vocab, ExplicitSubwordVocab):
        head = struct.pack("<QQII", vocab.words_len, len(vocab.ngrams), vocab.min_n, vocab.max_n)
        ngrams = b"".join(
            _string(n) + struct.pack("<Q", i) for n, i in zip(vocab.ngrams, vocab.ngram_indices)
        )
        return head + words + ngrams
    if isinstance(vocab, BucketSubwordVocab):
        indexer = vocab.indexer
        param = (
            indexer.bucket_exp
            if isinstance(indexer, FinalfusionHashIndexer)
            else indexer.n_buckets
        )
        return struct.pack("<QIII", vocab.words_len, vocab.min_n, vocab.max_n, param) + words
    return struct.pack("<Q", vocab.words_len) + words


def _write_matrix(w: _Writer, matrix: np.ndarray):
    for start in range(0, len(matrix), WRITE_BLOCK_ROWS):
        block = np.asarray(matrix[start : start + WRITE_BLOCK_ROWS], dtype="<f4")
        w.write(block.tobytes())


def _write_chunk_header(w: _Writer, chunk_id: ChunkIdentifier, length: int):
    w.pack("IQ", int(chunk_id), length)


def _write_dense(w: _Writer, storage: DenseStorage):
    rows, cols = storage.shape
    pad = w.padding(w.offset + 12 + 16)
    _write_chunk_header(w, ChunkIdentifier.NDARRAY, 16 + pad + rows * cols * 4)
    w.pack("QII", rows, cols, TYPE_F32)
    w.align()
    _write_matrix(w, storage.matrix)


def _write_quantized(w: _Writer, storage: QuantizedStorage):
    rows, dims = storage.shape
    m, k, _ = storage.codebooks.shape
    pad = w.padding(w.offset + 12 + 32)
    proj_bytes = dims * dims * 4 if storage.projection is not None else 0
    length = 32 + pad + proj_bytes + storage.codebooks.size * 4 + storage.codes.size
    _write_chunk_header(w, ChunkIdentifier.QUANTIZED_ARRAY, length)
    w.pack("IIII", int(storage.projection is not None), m, TYPE_F32, TYPE_U8)
    w.pack("Q", rows)
    w.pack("II", k, dims)
    w.align()
    if storage.projection is not None:
        w.write(np.asarray(storage.projection, dtype="<f4").tobytes())
    w.write(np.asarray(storage.codebooks, dtype="<f4").tobytes())
    w.write(np.ascontiguousarray(storage.codes, dtype=np.uint8).tobytes())


def _write_norms(w: _Writer, norms: np.ndarray):
    pad = w.padding(w.offset + 12 + 12)
    _write_chunk_header(w, ChunkIdentifier.NDNORMS, 12 + pad + len(norms) * 4)
    w.pack("QI", len(norms), TYPE_F32)
    w.align()
    w.write(np.asarray(norms, dtype="<f4").tobytes())


def metadata_to_toml(metadata: dict) -> str:
    try:
        return tomli_w.dumps(metadata)
    except TypeError as e:
        raise ValueError(f"Metadata cannot be written as TOML: {e}") from e


def write_finalfusion(embeddings: Embeddings, f: BinaryIO):
    vocab, storage = embeddings.vocab, embeddings.storage
    chunk_ids = []
    if embeddings.metadata is not None:
        chunk_ids.append(ChunkIdentifier.METADATA)
    chunk_ids += [vocab.chunk_id, storage.chunk_id]
    if embeddings.norms is not None:
        chunk_ids.append(ChunkIdentifier.NDNORMS)

    w = _Writer(f)
    w.write(MAGIC)
    w.pack("II", MODEL_VERSION, len(chunk_ids))
    w.pack(f"{len(chunk_ids)}I", *map(int, chunk_ids))

    if embeddings.metadata is not None:
        payload = metadata_to_toml(embeddings.metadata).encode("utf-8")
        _write_chunk_header(w, ChunkIdentifier.METADATA, len(payload))
        w.write(payload)

    payload = _vocab_payload(vocab)
    _write_chunk_header(w, vocab.chunk_id, len(payload))
    w.write(payload)

    if isinstance(storage, QuantizedStorage):
        _write_quantized(w, storage)
    else:
        _write_dense(w, storage)

    if embeddings.norms is not None:
        _write_norms(w, embeddings.norms)


# ── word2vec / text ────────────────────────────────────────────────


def _normalized(words: list[str], matrix: np.ndarray) -> Embeddings:
    vocab = SimpleVocab(words)
    norms = l2_normalize_rows(matrix)
    return Embeddings(vocab, DenseStorage(matrix), norms)


def read_word2vec_binary(f: BinaryIO, lossy: bool = False) -> Embeddings:
    r = _Reader(f)
    raw, _ = r.until(b"\n", "word2vec header")
    parts = raw.split()
    try:
        rows, dims = (int(p) for p in parts)
    except ValueError:
        raise CorruptData(f"Malformed word2vec header: {raw[:64]!r}", 0) from None
    if rows < 0 or dims <= 0:
        raise CorruptData(f"Invalid word2vec shape {rows} x {dims}", 0)

    words = []
    matrix = np.empty((rows, dims), dtype=np.float32)
    for i in range(rows):
        raw, at = r.until(b" ", "word", skip_leading=b"\n")
        if not raw:
            raise CorruptData("Empty word", at)
        words.append(_decode(raw, lossy, at))
        matrix[i] = r.floats(dims, "word vector")
    return _normalized(words, matrix)


def _read_text(f: BinaryIO, with_dims: bool, lossy: bool) -> Embeddings:
    offset = 0
    expected_rows = None
    dims = None
    words, rows = [], []
    for line_no, raw in enumerate(f):
        at = offset
        offset += len(raw)
        line = _decode(raw, lossy, at).rstrip("\r\n")
        if with_dims and line_no == 0:
            try:
                expected_rows, dims = (int(p) for p in line.split())
            except ValueError:
                raise CorruptData(f"Malformed textdims header: {line[:64]!r}", at) from None
            continue
        if not line.strip():
            continue
        parts = line.rstrip().split(" ")
        if dims is None:
            dims = len(parts) - 1
            if dims <= 0:
                raise CorruptData(f"Line {line_no + 1} has no vector components", at)
        if len(parts) - 1 != dims:
            raise CorruptData(
                f"Line {line_no + 1} has {len(parts) - 1} components, expected {dims}", at
            )
        try:
            rows.append(np.array(parts[1:], dtype=np.float32))
        except ValueError:
            raise CorruptData(f"Line {line_no + 1} contains a non-numeric component", at) from None
        words.append(parts[0])
    if with_dims and expected_rows is None:
        raise CorruptData("Missing textdims header", 0)
    if expected_rows is not None and expected_rows != len(words):
        raise CorruptData(f"Header declares {expected_rows:,} rows, found {len(words):,}", offset)
    matrix = np.vstack(rows) if rows else np.zeros((0, dims or 0), dtype=np.float32)
    return _normalized(words, matrix)


def _word_rows(
    embeddings: Embeddings, unnormalize: bool
) -> Iterator[tuple[str, np.ndarray]]:
    words = embeddings.vocab.words
    for start in range(0, len(words), WRITE_BLOCK_ROWS):
        end = min(start + WRITE_BLOCK_ROWS, len(words))
        block = embeddings.storage.rows_at(np.arange(start, end))
        if unnormalize and embeddings.norms is not None:
            block *= embeddings.norms[start:end, None]
        yield from zip(words[start:end], block)


def write_word2vec_binary(embeddings: Embeddings, f: BinaryIO, unnormalize: bool = False):
    f.write(f"{len(embeddings)} {embeddings.dims}\n".encode("utf-8"))
    for word, vec in _word_rows(embeddings, unnormalize):
        f.write(word.encode("utf-8") + b" ")
        f.write(vec.astype("<f4").tobytes())
        f.write(b"\n")


def write_text(
    embeddings: Embeddings, f: BinaryIO, with_dims: bool = False, unnormalize: bool = False
):
    if with_dims:
        f.write(f"{len(embeddings)} {embeddings.dims}\n".encode("utf-8"))
    for word, vec in _word_rows(embeddings, unnormalize):
        f.write(f"{word} {' '.join(str(x) for x in vec)}\n".encode("utf-8"))


# ── fastText ───────────────────────────────────────────────────────


def _precompute_word_vectors(vocab: BucketSubwordVocab, matrix: np.ndarray):
    """Replace each word row by the mean of the word row and its n-gram rows."""
    flat, offsets = [], [0]
    for idx, word in enumerate(vocab.words):
        flat.append(idx)
        flat.extend(vocab.subword_indices(word))
        offsets.append(len(flat))
    bags = F.embedding_bag(
        torch.tensor(flat, dtype=torch.long),
        torch.from_numpy(matrix),
        torch.tensor(offsets, dtype=torch.long),
        mode="mean",
        include_last_offset=True,
    )
    matrix[: vocab.words_len] = bags.numpy()


def read_fasttext(f: BinaryIO, lossy: bool = False) -> Embeddings:
    r = _Reader(f)
    magic, version = r.unpack("ii", "fastText header")
    if magic != FASTTEXT_MAGIC:
        raise CorruptData(f"Not a fastText model (magic {magic})", 0)
    if version > FASTTEXT_VERSION:
        raise CorruptData(f"Unsupported fastText version {version}", 4)

    args_at = r.offset
    (dim, _ws, _epoch, _min_count, _neg, _word_ngrams, _loss, _model,
     bucket, minn, maxn, _lr_update_rate, _t) = r.unpack("12id", "model arguments")
    if dim <= 0 or bucket < 0 or minn < 0 or maxn < 0:
        raise CorruptData("Invalid fastText model arguments", args_at)

    size, nwords, _nlabels = r.unpack("iii", "dictionary header")
    _ntokens, pruneidx_size = r.unpack("qq", "dictionary header")
    words = []
    for _ in range(size):
        raw, at = r.until(b"\x00", "dictionary entry")
        _count, entry_type = r.unpack("qb", "dictionary entry")
        if entry_type == 0:
            words.append(_decode(raw, lossy, at))
    if len(words) != nwords:
        raise CorruptData(f"Dictionary declares {nwords:,} words, found {len(words):,}", r.offset)
    if pruneidx_size > 0:
        raise CorruptData("Pruned fastText vocabularies are not supported", r.offset)

    quant_at = r.offset
    (quant_input,) = r.unpack("?", "quantization flag")
    if quant_input:
        raise CorruptData("Quantized fastText models are not supported", quant_at)

    shape_at = r.offset
    m, n = r.unpack("qq", "input matrix shape")
    if n != dim or m != nwords + bucket:
        raise CorruptData(
            f"Input matrix is {m:,} x {n}, expected {nwords + bucket:,} x {dim}", shape_at
        )
    matrix = r.floats(m * n, "input matrix").reshape(m, n)

    if maxn == 0:
        vocab = SimpleVocab(words)
        matrix = matrix[:nwords].copy()
    else:
        vocab = BucketSubwordVocab(words, minn, maxn, FastTextIndexer(bucket))
        _precompute_word_vectors(vocab, matrix)
    norms = l2_normalize_rows(matrix[:nwords])
    return Embeddings(vocab, DenseStorage(matrix), norms)


# ── Entry Points ───────────────────────────────────────────────────


@contextmanager
def _open_source(source: Source):
    if isinstance(source, (str, os.PathLike)):
        with open(source, "rb") as f:
            yield f
    else:
        yield source


@contextmanager
def atomic_output(path: Union[str, os.PathLike]):
    """Binary handle on a temporary sibling that replaces ``path`` on success."""
    path = Path(path)
    f = tempfile.NamedTemporaryFile(
        dir=path.parent, prefix=f"{path.name}.", suffix=".tmp", delete=False
    )
    tmp = Path(f.name)
    try:
        with f:
            yield f
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def read_embeddings(
    source: Source,
    fmt: Union[str, EmbeddingFormat] = EmbeddingFormat.FINALFUSION,
    lossy: bool = False,
) -> Embeddings:
    fmt = EmbeddingFormat.parse(fmt)
    is_path = isinstance(source, (str, os.PathLike))
    if fmt is EmbeddingFormat.FINALFUSION_MMAP and not is_path:
        raise ValueError("Memory-mapped reading needs a file path")
    try:
        with _open_source(source) as f:
            if fmt is EmbeddingFormat.FINALFUSION:
                embeddings = read_finalfusion(f, lossy=lossy)
            elif fmt is EmbeddingFormat.FINALFUSION_MMAP:
                embeddings = read_finalfusion(f, mmap_path=os.fspath(source), lossy=lossy)
            elif fmt is EmbeddingFormat.WORD2VEC:
                embeddings = read_word2vec_binary(f, lossy)
            elif fmt is EmbeddingFormat.FASTTEXT:
                embeddings = read_fasttext(f, lossy)
            else:
                embeddings = _read_text(f, fmt is EmbeddingFormat.TEXTDIMS, lossy)
    except IoFailure:
        raise
    except OSError as e:
        raise IoFailure(f"Cannot read embeddings from {source}: {e}", source) from e
    logger.info(
        f"Read {len(embeddings):,} words x {embeddings.dims} dims "
        f"({type(embeddings.vocab).__name__}, {type(embeddings.storage).__name__}) "
        f"as {fmt.value}"
    )
    return embeddings


def _write(embeddings: Embeddings, f: BinaryIO, fmt: EmbeddingFormat, unnormalize: bool):
    if fmt is EmbeddingFormat.FINALFUSION:
        write_finalfusion(embeddings, f)
    elif fmt is EmbeddingFormat.WORD2VEC:
        write_word2vec_binary(embeddings, f, unnormalize)
    else:
        write_text(embeddings, f, fmt is EmbeddingFormat.TEXTDIMS, unnormalize)


def write_embeddings(
    embeddings: Embeddings,
    target: Source,
    fmt: Union[str, EmbeddingFormat] = EmbeddingFormat.FINALFUSION,
    unnormalize: bool = False,
):
    fmt = EmbeddingFormat.parse(fmt)
    if fmt in (EmbeddingFormat.FASTTEXT, EmbeddingFormat.FINALFUSION_MMAP):
        raise ValueError(f"Writing the {fmt.value} format is not supported")
    if not isinstance(target, (str, os.PathLike)):
        _write(embeddings, target, fmt, unnormalize)
        return
    try:
        with atomic_output(target) as f:
            _write(embeddings, f, fmt, unnormalize)
    except IoFailure:
        raise
    except OSError as e:
        raise IoFailure(f"Cannot write embeddings to {target}: {e}", target) from e
    logger.info(f"Wrote {len(embeddings):,} words to {target} as {fmt.value}")


def read_metadata(source: Source) -> Optional[dict]:
    """Metadata chunk of a native file, or None; other chunks are not decoded."""
    try:
        with _open_source(source) as f:
            parts, _ = _read_chunks(_Reader(f), frozenset({ChunkIdentifier.METADATA}))
    except OSError as e:
        if isinstance(e, IoFailure):
            raise
        raise IoFailure(f"Cannot read metadata from {source}: {e}", source) from e
    return parts.get(ChunkIdentifier.METADATA)


def load_metadata_file(path: Union[str, os.PathLike]) -> dict:
    """TOML document used to replace embedding metadata."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except OSError as e:
        raise IoFailure(f"Cannot read metadata file {path}: {e}", path) from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Metadata file {path} is not valid TOML: {e}") from e
