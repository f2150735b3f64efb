"""
Shared test fixtures and configuration for pytest.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Modules live at the repository root
sys.path.insert(0, str(Path(__file__).parent.parent))

from ffutils_model import (  # noqa: E402
    BucketSubwordVocab,
    DenseStorage,
    Embeddings,
    FinalfusionHashIndexer,
    SimpleVocab,
    l2_normalize_rows,
)


def make_embeddings(words, rows, metadata=None) -> Embeddings:
    """Simple-vocabulary embeddings with normalized rows and recorded norms."""
    matrix = np.array(rows, dtype=np.float32)
    norms = l2_normalize_rows(matrix)
    return Embeddings(SimpleVocab(words), DenseStorage(matrix), norms, metadata)


@pytest.fixture
def abc_embeddings() -> Embeddings:
    return make_embeddings(["a", "b", "c"], [[1.0, 0.0], [0.9, 0.1], [0.0, 1.0]])


@pytest.fixture
def abcd_embeddings() -> Embeddings:
    return make_embeddings(
        ["a", "b", "c", "d"], [[1.0, 0.0], [0.9, 0.1], [0.0, 1.0], [0.1, 0.9]]
    )


@pytest.fixture
def random_embeddings() -> Embeddings:
    rng = np.random.default_rng(7)
    words = [f"w{i}" for i in range(64)]
    return make_embeddings(words, rng.normal(size=(64, 8)), metadata={"corpus": "random"})


@pytest.fixture
def subword_embeddings() -> Embeddings:
    rng = np.random.default_rng(11)
    words = ["house", "mouse", "horse"]
    vocab = BucketSubwordVocab(words, 3, 6, FinalfusionHashIndexer(6))
    matrix = rng.normal(size=(vocab.vocab_len, 4)).astype(np.float32)
    norms = l2_normalize_rows(matrix[: vocab.words_len])
    return Embeddings(vocab, DenseStorage(matrix), norms)
