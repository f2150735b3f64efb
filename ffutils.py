"""
ffutils - Embedding compression and query engine.

Quantization: matrix → (rotate) → subspaces → k-means per subspace → codebooks → codes
Query:        word → row | n-gram mean → normalize → block scores → top-k → merge

Everything here operates on ffutils_model.Embeddings and returns new
instances; nothing mutates its input. The codec (ffutils_format.py) and
the command line (ffutils_cli.py) are not imported here.
"""

from __future__ import annotations

import logging, math, os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Generator, Iterable, Optional, Sequence

import numpy as np
import pandas as pd
import torch

from ffutils_model import (
    BucketSubwordVocab,
    DenseStorage,
    DimensionMismatch,
    Embeddings,
    ExplicitSubwordVocab,
    InvalidSubspaceCount,
    QuantizedStorage,
    SimpleVocab,
    Storage,
    UnknownWord,
    l2_normalize,
    l2_normalize_rows,
    ngrams,
)

QUANTIZERS = ("pq", "opq", "gaussian_opq")
SIMILARITY_MEASURES = ("cosine", "angular")

_ASSIGN_BLOCK = 65536
_SEED_MASK = (1 << 63) - 1


# ── Helpers ────────────────────────────────────────────────────────


def n_workers(n_threads: int = 0) -> int:
    return n_threads if n_threads > 0 else (os.cpu_count() or 1)


def blocks(n: int, size: int) -> Generator[tuple[int, int], None, None]:
    for start in range(0, n, size):
        yield start, min(start + size, n)


def angular_similarity(cosine: float) -> float:
    return 1.0 - math.acos(max(-1.0, min(1.0, cosine))) / math.pi


def top_k(
    scores: np.ndarray, indices: np.ndarray, k: int
) -> tuple[np.ndarray, np.ndarray]:
    """k highest scores in descending order, ties broken by ascending index.

    Every score equal to the k-th is kept before sorting, so the result
    does not depend on how candidates were split into blocks.
    """
    if k <= 0 or len(scores) == 0:
        return scores[:0], indices[:0]
    scores = np.where(np.isnan(scores), -np.inf, scores)
    if len(scores) > k:
        kth = scores[np.argpartition(scores, -k)[-k:]].min()
        keep = scores >= kth
        scores, indices = scores[keep], indices[keep]
    order = np.lexsort((indices, -scores))[:k]
    return scores[order], indices[order]


# ── K-means ────────────────────────────────────────────────────────


def _assign(x: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Nearest centroid by squared Euclidean distance; ties → lowest index."""
    c_sq = np.einsum("kd,kd->k", centroids, centroids)
    out = np.empty(len(x), dtype=np.int64)
    for s, e in blocks(len(x), _ASSIGN_BLOCK):
        dist = c_sq[None, :] - 2.0 * (x[s:e] @ centroids.T)
        out[s:e] = np.argmin(dist, axis=1)
    return out


def _update(x: np.ndarray, assignments: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    k, ds = centroids.shape
    counts = np.bincount(assignments, minlength=k)
    filled = counts > 0
    out = centroids.copy()
    for j in range(ds):
        sums = np.bincount(assignments, weights=x[:, j], minlength=k)
        out[filled, j] = sums[filled] / counts[filled]
    return out


def _sse(x: np.ndarray, centroids: np.ndarray, assignments: np.ndarray) -> float:
    diff = (x - centroids[assignments]).astype(np.float64)
    return float(np.einsum("ij,ij->", diff, diff))


def kmeans(
    x: np.ndarray,
    n_centroids: int,
    n_iterations: int,
    generator: torch.Generator,
    init: Optional[np.ndarray] = None,
) -> tuple[np.ndarray, float]:
    """Lloyd iterations until assignments are stable; returns (centroids, sse)."""
    if init is not None:
        centroids = np.array(init, dtype=np.float32)
    else:
        n = len(x)
        if n >= n_centroids:
            pick = torch.randperm(n, generator=generator)[:n_centroids]
        else:
            pick = torch.randint(0, n, (n_centroids,), generator=generator)
        centroids = x[pick.numpy()].astype(np.float32, copy=True)

    assignments = None
    for _ in range(n_iterations):
        new = _assign(x, centroids)
        if assignments is not None and np.array_equal(new, assignments):
            break
        assignments = new
        centroids = _update(x, assignments, centroids)
    return centroids, _sse(x, centroids, _assign(x, centroids))


def _task_seed(seed: int, subspace: int, attempt: int) -> int:
    return ((seed * 1_000_003 + subspace) * 1_009 + attempt) & _SEED_MASK


def _train_subspace(
    x: np.ndarray,
    n_centroids: int,
    n_iterations: int,
    n_attempts: int,
    seed: int,
    subspace: int,
    init: Optional[np.ndarray] = None,
) -> tuple[np.ndarray, float]:
    x = np.ascontiguousarray(x, dtype=np.float32)
    best = None
    for attempt in range(n_attempts if init is None else 1):
        g = torch.Generator(device="cpu").manual_seed(_task_seed(seed, subspace, attempt))
        centroids, sse = kmeans(x, n_centroids, n_iterations, g, init)
        if best is None or sse < best[1]:
            best = (centroids, sse)
    return best


# ── Product Quantization ───────────────────────────────────────────


def check_quantizer_params(dims: int, n_subquantizers: int, quantizer_bits: int):
    if n_subquantizers <= 0 or dims % n_subquantizers:
        raise InvalidSubspaceCount(dims, n_subquantizers)
    if not 1 <= quantizer_bits <= 8:
        raise ValueError(f"quantizer_bits must be in [1, 8], was {quantizer_bits}")


@dataclass
class ProductQuantizer:
    codebooks: np.ndarray  # (subquantizers, centroids, sub_dims)
    projection: Optional[np.ndarray] = None  # (dims, dims), rows are rotated by x @ projection
    sse: float = 0.0

    @property
    def n_subquantizers(self) -> int:
        return self.codebooks.shape[0]

    @property
    def dims(self) -> int:
        return self.codebooks.shape[0] * self.codebooks.shape[2]

    def encode(self, matrix: np.ndarray, n_threads: int = 1) -> np.ndarray:
        x = np.asarray(matrix, dtype=np.float32)
        if x.shape[1] != self.dims:
            raise DimensionMismatch(self.dims, x.shape[1], "matrix dims")
        if self.projection is not None:
            x = (x @ self.projection).astype(np.float32)
        ds = self.codebooks.shape[2]

        def encode_subspace(j: int) -> np.ndarray:
            sub = np.ascontiguousarray(x[:, j * ds : (j + 1) * ds])
            return _assign(sub, self.codebooks[j]).astype(np.uint8)

        with ThreadPoolExecutor(max_workers=n_workers(n_threads)) as pool:
            columns = list(pool.map(encode_subspace, range(self.n_subquantizers)))
        if not columns or len(x) == 0:
            return np.zeros((len(x), self.n_subquantizers), dtype=np.uint8)
        return np.stack(columns, axis=1)

    def decode(self, codes: np.ndarray) -> np.ndarray:
        """Rows in the rotated space (no inverse projection)."""
        m = self.n_subquantizers
        parts = self.codebooks[np.arange(m)[None, :], np.asarray(codes, dtype=np.intp)]
        return parts.reshape(len(codes), self.dims)

    def storage(self, matrix: np.ndarray, n_threads: int = 1) -> QuantizedStorage:
        return QuantizedStorage(self.codebooks, self.encode(matrix, n_threads), self.projection)


def train_pq(
    matrix: np.ndarray,
    n_subquantizers: int,
    quantizer_bits: int = 8,
    n_iterations: int = 100,
    n_attempts: int = 1,
    seed: int = 42,
    n_threads: int = 0,
    logger: logging.Logger = None,
    init: Optional[np.ndarray] = None,
) -> ProductQuantizer:
    """Train one codebook per subspace on the pool, merged in subspace order."""
    logger = logger or logging.getLogger(__name__)
    x = np.asarray(matrix, dtype=np.float32)
    dims = x.shape[1]
    check_quantizer_params(dims, n_subquantizers, quantizer_bits)
    if len(x) == 0:
        raise ValueError("Cannot train a quantizer on an empty matrix")
    ds = dims // n_subquantizers
    k = 1 << quantizer_bits

    with ThreadPoolExecutor(max_workers=n_workers(n_threads)) as pool:
        futures = [
            pool.submit(
                _train_subspace,
                x[:, j * ds : (j + 1) * ds],
                k,
                n_iterations,
                n_attempts,
                seed,
                j,
                None if init is None else init[j],
            )
            for j in range(n_subquantizers)
        ]
        results = [f.result() for f in futures]

    codebooks = np.stack([c for c, _ in results]).astype(np.float32)
    sse = sum(s for _, s in results)
    logger.debug(
        f"Trained {n_subquantizers} x {k} centroids on {len(x):,} rows, sse={sse:.4f}"
    )
    return ProductQuantizer(codebooks, sse=sse)


def _eigen_allocation(x: np.ndarray, n_subquantizers: int) -> np.ndarray:
    """PCA rotation whose components are spread over subspaces by variance."""
    dims = x.shape[1]
    if len(x) < 2:
        return np.eye(dims)
    cov = torch.cov(torch.from_numpy(np.asarray(x, dtype=np.float64).T)).reshape(dims, dims)
    eigvals, eigvecs = torch.linalg.eigh(cov)
    log_vals = torch.log(eigvals.clamp_min(1e-12)).tolist()
    capacity = dims // n_subquantizers
    buckets = [[] for _ in range(n_subquantizers)]
    products = [0.0] * n_subquantizers
    for i in torch.argsort(eigvals, descending=True).tolist():
        b = min(
            (b for b in range(n_subquantizers) if len(buckets[b]) < capacity),
            key=lambda b: products[b],
        )
        buckets[b].append(i)
        products[b] += log_vals[i]
    perm = [i for bucket in buckets for i in bucket]
    return eigvecs[:, perm].numpy()


def _procrustes(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Orthogonal R minimizing ||x @ R - y||."""
    m = torch.from_numpy(np.asarray(x, dtype=np.float64).T @ np.asarray(y, dtype=np.float64))
    u, _, vh = torch.linalg.svd(m)
    return (u @ vh).numpy()


def train_gaussian_opq(
    matrix: np.ndarray,
    n_subquantizers: int,
    quantizer_bits: int = 8,
    n_iterations: int = 100,
    n_attempts: int = 1,
    seed: int = 42,
    n_threads: int = 0,
    logger: logging.Logger = None,
) -> ProductQuantizer:
    x = np.asarray(matrix, dtype=np.float32)
    check_quantizer_params(x.shape[1], n_subquantizers, quantizer_bits)
    rotation = _eigen_allocation(x, n_subquantizers)
    rotated = (x @ rotation).astype(np.float32)
    pq = train_pq(
        rotated, n_subquantizers, quantizer_bits, n_iterations, n_attempts, seed, n_threads, logger
    )
    return ProductQuantizer(pq.codebooks, rotation.astype(np.float32), pq.sse)


def train_opq(
    matrix: np.ndarray,
    n_subquantizers: int,
    quantizer_bits: int = 8,
    n_iterations: int = 100,
    n_attempts: int = 1,
    seed: int = 42,
    n_threads: int = 0,
    logger: logging.Logger = None,
    inner_iterations: int = 1,
) -> ProductQuantizer:
    """Alternate codebook refinement and Procrustes rotation updates.

    Starts from the eigenvalue-allocated PCA rotation; each outer round
    re-solves the rotation against the current reconstruction and warm
    starts k-means from the previous codebooks.
    """
    logger = logger or logging.getLogger(__name__)
    x = np.asarray(matrix, dtype=np.float32)
    check_quantizer_params(x.shape[1], n_subquantizers, quantizer_bits)
    rotation = _eigen_allocation(x, n_subquantizers)
    rotated = (x @ rotation).astype(np.float32)
    pq = train_pq(
        rotated, n_subquantizers, quantizer_bits, n_iterations, n_attempts, seed, n_threads, logger
    )
    for i in range(n_iterations):
        recon = pq.decode(pq.encode(rotated, n_threads))
        rotation = _procrustes(x, recon)
        rotated = (x @ rotation).astype(np.float32)
        pq = train_pq(
            rotated,
            n_subquantizers,
            quantizer_bits,
            inner_iterations,
            1,
            seed,
            n_threads,
            logger,
            init=pq.codebooks,
        )
        if (i + 1) % 10 == 0:
            logger.info(f"OPQ round {i + 1}/{n_iterations}: sse={pq.sse:.4f}")
    return ProductQuantizer(pq.codebooks, rotation.astype(np.float32), pq.sse)


_TRAINERS = {"pq": train_pq, "opq": train_opq, "gaussian_opq": train_gaussian_opq}


@dataclass
class QuantizationLoss:
    avg_cosine: float
    avg_euclidean: float


def quantization_loss(
    original: Storage, quantized: Storage, block_size: int = 65536
) -> QuantizationLoss:
    rows = original.shape[0]
    if quantized.shape != original.shape:
        raise DimensionMismatch(rows, quantized.shape[0], "quantized rows")
    if rows == 0:
        return QuantizationLoss(1.0, 0.0)
    cos_sum = dist_sum = 0.0
    for s, e in blocks(rows, block_size):
        idx = np.arange(s, e)
        a = original.rows_at(idx).astype(np.float64)
        b = quantized.rows_at(idx).astype(np.float64)
        na, nb = np.linalg.norm(a, axis=1), np.linalg.norm(b, axis=1)
        denom = na * nb
        cos = np.divide(
            np.einsum("ij,ij->i", a, b), denom, out=np.zeros(len(a)), where=denom != 0
        )
        cos_sum += float(cos.sum())
        dist_sum += float(np.linalg.norm(a - b, axis=1).sum())
    return QuantizationLoss(cos_sum / rows, dist_sum / rows)


def quantize_embeddings(
    embeddings: Embeddings,
    quantizer: str = "pq",
    n_subquantizers: Optional[int] = None,
    quantizer_bits: int = 8,
    n_iterations: int = 100,
    n_attempts: int = 1,
    n_samples: Optional[int] = None,
    seed: int = 42,
    n_threads: int = 0,
    logger: logging.Logger = None,
) -> Embeddings:
    logger = logger or logging.getLogger(__name__)
    storage = embeddings.storage
    if isinstance(storage, QuantizedStorage):
        raise ValueError("Embeddings are already quantized")
    if quantizer not in _TRAINERS:
        raise ValueError(f"Unknown quantizer: {quantizer} (expected one of {', '.join(QUANTIZERS)})")
    dims = storage.dims
    m = n_subquantizers if n_subquantizers is not None else max(1, dims // 2)
    check_quantizer_params(dims, m, quantizer_bits)

    matrix = storage.matrix
    train_x = matrix
    if n_samples is not None and 0 < n_samples < len(matrix):
        g = torch.Generator(device="cpu").manual_seed(seed)
        pick = torch.randperm(len(matrix), generator=g)[:n_samples].sort().values.numpy()
        train_x = np.asarray(matrix[pick])
    logger.info(
        f"Training {quantizer} with {m} subquantizers x {1 << quantizer_bits} centroids "
        f"on {len(train_x):,}/{len(matrix):,} rows ({n_workers(n_threads)} threads)"
    )

    pq = _TRAINERS[quantizer](
        train_x, m, quantizer_bits, n_iterations, n_attempts, seed, n_threads, logger
    )
    quantized = pq.storage(matrix, n_threads)

    loss = quantization_loss(storage, quantized)
    logger.info(
        f"Quantization loss: avg cosine {loss.avg_cosine:.4f}, "
        f"avg euclidean {loss.avg_euclidean:.4f}"
    )
    return Embeddings(embeddings.vocab, quantized, embeddings.norms, embeddings.metadata)


# ── Query Engine ───────────────────────────────────────────────────


@dataclass(frozen=True)
class WordSimilarity:
    word: str
    similarity: float  # cosine

    def score(self, measure: str = "cosine") -> float:
        if measure == "angular":
            return angular_similarity(self.similarity)
        if measure != "cosine":
            raise ValueError(f"Unknown similarity measure: {measure}")
        return self.similarity


@dataclass(frozen=True)
class AnalogyInstance:
    category: str
    query: tuple[str, str, str]
    answer: str


@dataclass
class CategoryAccuracy:
    category: str
    n_correct: int
    n_instances: int
    n_skipped: int
    avg_cosine: float

    @property
    def accuracy(self) -> float:
        return self.n_correct / self.n_instances if self.n_instances else 0.0


@dataclass
class AccuracyReport:
    n_correct: int = 0
    n_instances: int = 0  # evaluated, excludes skipped
    n_skipped: int = 0
    avg_cosine: float = 0.0
    categories: list[CategoryAccuracy] = field(default_factory=list)

    @property
    def accuracy(self) -> float:
        return self.n_correct / self.n_instances if self.n_instances else 0.0

    @property
    def skipped_ratio(self) -> float:
        total = self.n_instances + self.n_skipped
        return self.n_skipped / total if total else 0.0


def read_analogies(lines: Iterable[str]) -> list[AnalogyInstance]:
    """Google analogy format: ``: category`` headers, then ``a b c d`` lines."""
    category = ""
    out = []
    for line_no, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        if line.startswith(":"):
            category = line[1:].strip()
            continue
        parts = line.split()
        if len(parts) != 4:
            raise ValueError(f"Line {line_no}: expected 4 words, got {len(parts)}: {line!r}")
        out.append(AnalogyInstance(category, (parts[0], parts[1], parts[2]), parts[3]))
    return out


class QueryEngine:
    """Similarity and analogy queries over the word rows of an embedding set.

    Scoring is split into ``block_size`` row blocks evaluated on a thread
    pool; each block yields its own top-k and the partial results are
    merged with the same ordering, so results are identical for every
    thread count and block size.
    """

    def __init__(
        self,
        embeddings: Embeddings,
        n_threads: int = 0,
        block_size: int = 65536,
        logger: logging.Logger = None,
        log_interval: int = 10000,
    ):
        if block_size <= 0:
            raise ValueError(f"block_size must be positive, was {block_size}")
        self.embeddings = embeddings
        self.block_size = block_size
        self.log_interval = log_interval
        self.logger = logger or logging.getLogger(__name__)
        self._pool = ThreadPoolExecutor(max_workers=n_workers(n_threads))

    def close(self):
        self._pool.shutdown(wait=True)

    def __enter__(self) -> QueryEngine:
        return self

    def __exit__(self, *exc):
        self.close()

    def embedding(self, word: str) -> np.ndarray:
        v = self.embeddings.embedding(word)
        if v is None:
            raise UnknownWord(word)
        v = np.array(v, dtype=np.float32)
        l2_normalize(v)
        return v

    def _block_top_k(
        self, query: np.ndarray, k: int, skip: np.ndarray, span: tuple[int, int]
    ) -> tuple[np.ndarray, np.ndarray]:
        start, end = span
        scores = self.embeddings.storage.scores(query, start, end)
        indices = np.arange(start, end)
        if skip.size:
            keep = ~np.isin(indices, skip)
            scores, indices = scores[keep], indices[keep]
        return top_k(scores, indices, k)

    def _search(
        self, query: np.ndarray, k: int, skip: Iterable[int], parallel: bool = True
    ) -> list[WordSimilarity]:
        n = self.embeddings.vocab.words_len
        skip_arr = np.fromiter(sorted(set(skip)), dtype=np.int64)
        spans = list(blocks(n, self.block_size))
        if parallel and len(spans) > 1:
            partials = list(
                self._pool.map(lambda span: self._block_top_k(query, k, skip_arr, span), spans)
            )
        else:
            partials = [self._block_top_k(query, k, skip_arr, span) for span in spans]
        if not partials:
            return []
        scores, indices = top_k(
            np.concatenate([p[0] for p in partials]),
            np.concatenate([p[1] for p in partials]),
            k,
        )
        words = self.embeddings.vocab.words
        return [WordSimilarity(words[i], float(s)) for s, i in zip(scores, indices)]

    def _query_vector(self, vector) -> np.ndarray:
        q = np.array(vector, dtype=np.float32)
        if q.ndim != 1 or len(q) != self.embeddings.dims:
            raise DimensionMismatch(self.embeddings.dims, q.shape[-1] if q.ndim else 0, "query dims")
        l2_normalize(q)
        return q

    def similar_vector(
        self, vector, k: int = 10, skip: Iterable[int] = (), parallel: bool = True
    ) -> list[WordSimilarity]:
        return self._search(self._query_vector(vector), k, skip, parallel)

    def similar(self, word: str, k: int = 10, parallel: bool = True) -> list[WordSimilarity]:
        vec = self.embedding(word)
        idx = self.embeddings.vocab.index_of(word)
        return self._search(vec, k, () if idx is None else (idx,), parallel)

    def analogy(
        self,
        a: str,
        b: str,
        c: str,
        k: int = 10,
        exclude: Sequence[bool] = (True, True, True),
        parallel: bool = True,
    ) -> list[WordSimilarity]:
        """Words closest to ``b - a + c``; a is to b as c is to the answer."""
        words = (a, b, c)
        vectors, missing = [], []
        for w in words:
            v = self.embeddings.embedding(w)
            if v is None:
                missing.append(w)
            else:
                v = np.array(v, dtype=np.float32)
                l2_normalize(v)
                vectors.append(v)
        if missing:
            raise UnknownWord(missing)
        query = vectors[1] - vectors[0] + vectors[2]
        vocab = self.embeddings.vocab
        skip = [
            vocab.index_of(w)
            for w, ex in zip(words, exclude)
            if ex and vocab.index_of(w) is not None
        ]
        return self._search(self._query_vector(query), k, skip, parallel)

    def _evaluate(self, instance: AnalogyInstance) -> tuple[str, bool, bool, float]:
        """(category, skipped, correct, cosine of top answer)."""
        if self.embeddings.vocab.index_of(instance.answer) is None:
            return instance.category, True, False, 0.0
        try:
            results = self.analogy(*instance.query, k=1, parallel=False)
        except UnknownWord:
            return instance.category, True, False, 0.0
        if not results:
            return instance.category, False, False, 0.0
        top = results[0]
        return instance.category, False, top.word == instance.answer, top.similarity

    def compute_accuracy(self, instances: Iterable[AnalogyInstance]) -> AccuracyReport:
        instances = list(instances)
        if not instances:
            return AccuracyReport()
        records = []
        for i, rec in enumerate(self._pool.map(self._evaluate, instances)):
            records.append(rec)
            if self.log_interval and (i + 1) % self.log_interval == 0:
                self.logger.info(f"Evaluated {i + 1:,}/{len(instances):,} analogies")

        df = pd.DataFrame(records, columns=["category", "skipped", "correct", "cosine"])
        df["evaluated"] = ~df["skipped"].astype(bool)
        df["correct"] = df["correct"].astype(bool)
        df["cosine"] = df["cosine"].where(df["evaluated"], 0.0)
        per = df.groupby("category", sort=False).agg(
            n_correct=("correct", "sum"),
            n_instances=("evaluated", "sum"),
            n_skipped=("skipped", "sum"),
            cosine=("cosine", "sum"),
        )

        categories = []
        for name, row in per.iterrows():
            n = int(row["n_instances"])
            categories.append(
                CategoryAccuracy(
                    category=name,
                    n_correct=int(row["n_correct"]),
                    n_instances=n,
                    n_skipped=int(row["n_skipped"]),
                    avg_cosine=float(row["cosine"]) / n if n else 0.0,
                )
            )
        n_eval = int(df["evaluated"].sum())
        report = AccuracyReport(
            n_correct=int(df["correct"].sum()),
            n_instances=n_eval,
            n_skipped=int(df["skipped"].sum()),
            avg_cosine=float(df["cosine"].sum()) / n_eval if n_eval else 0.0,
            categories=categories,
        )
        self.logger.info(
            f"Accuracy {report.accuracy:.2%} ({report.n_correct:,}/{report.n_instances:,}), "
            f"skipped {report.n_skipped:,}"
        )
        return report


# ── Transforms ─────────────────────────────────────────────────────


def _take_rows(storage: Storage, rows: np.ndarray) -> Storage:
    if isinstance(storage, QuantizedStorage):
        return QuantizedStorage(storage.codebooks, storage.codes[rows], storage.projection)
    return DenseStorage(np.array(storage.matrix[rows], dtype=np.float32))


def bucket_to_explicit(embeddings: Embeddings) -> Embeddings:
    """Keep only the buckets the vocabulary's n-grams use, in first-use order."""
    vocab = embeddings.vocab
    if not isinstance(vocab, BucketSubwordVocab):
        raise ValueError(
            f"Only bucketed subword vocabularies can be converted, got {type(vocab).__name__}"
        )
    remap: dict[int, int] = {}
    seen_ngrams, ngram_list, ngram_indices = set(), [], []
    for word in vocab.words:
        for ngram in ngrams(word, vocab.min_n, vocab.max_n):
            if ngram in seen_ngrams:
                continue
            seen_ngrams.add(ngram)
            bucket = vocab.indexer.index_ngram(ngram)
            ngram_list.append(ngram)
            ngram_indices.append(remap.setdefault(bucket, len(remap)))

    explicit = ExplicitSubwordVocab(
        vocab.words, ngram_list, vocab.min_n, vocab.max_n, ngram_indices
    )
    rows = np.concatenate(
        [
            np.arange(vocab.words_len, dtype=np.int64),
            vocab.words_len + np.fromiter(remap.keys(), dtype=np.int64, count=len(remap)),
        ]
    )
    storage = _take_rows(embeddings.storage, rows)
    return Embeddings(explicit, storage, embeddings.norms, embeddings.metadata)


def select(
    embeddings: Embeddings,
    words: Iterable[str],
    ignore_unknown: bool = False,
    logger: logging.Logger = None,
) -> Embeddings:
    """Dense SimpleVocab embeddings of ``words`` in input order, duplicates dropped."""
    logger = logger or logging.getLogger(__name__)
    chosen, vectors, norms = [], [], []
    seen = set()
    for word in words:
        if word in seen:
            continue
        found = embeddings.embedding_with_norm(word)
        if found is None:
            if not ignore_unknown:
                raise UnknownWord(word)
            logger.debug(f"Ignoring unknown word {word!r}")
            continue
        seen.add(word)
        chosen.append(word)
        vectors.append(found[0])
        norms.append(found[1])
    matrix = (
        np.vstack(vectors).astype(np.float32)
        if vectors
        else np.zeros((0, embeddings.dims), dtype=np.float32)
    )
    logger.info(f"Selected {len(chosen):,} words")
    return Embeddings(
        SimpleVocab(chosen),
        DenseStorage(matrix),
        np.array(norms, dtype=np.float32),
        embeddings.metadata,
    )


def reconstruct(embeddings: Embeddings) -> Embeddings:
    storage = embeddings.storage
    if not isinstance(storage, QuantizedStorage):
        raise ValueError("Only quantized embeddings can be reconstructed")
    dense = storage.reconstruct()
    norms = embeddings.norms
    if norms is None:
        norms = l2_normalize_rows(dense.matrix[: embeddings.vocab.words_len])
    return Embeddings(embeddings.vocab, dense, norms, embeddings.metadata)
