"""
ffutils_cli - Command line front end for ffutils.

Each subcommand reads its inputs through ffutils_format, runs one
operation from ffutils and writes the result. Queries are read one per
line from a file or stdin; results are printed as ``word<TAB>score``.
"""

from __future__ import annotations

import argparse, logging, sys
from contextlib import contextmanager
from dataclasses import replace
from typing import Generator, Optional, TextIO

from ffutils_model import Config, EmbeddingError, UnknownWord
from ffutils_format import (
    EmbeddingFormat,
    atomic_output,
    load_metadata_file,
    metadata_to_toml,
    read_embeddings,
    read_metadata,
    write_embeddings,
)
from ffutils import (
    QUANTIZERS,
    SIMILARITY_MEASURES,
    QueryEngine,
    bucket_to_explicit,
    quantize_embeddings,
    read_analogies,
    reconstruct,
    select,
)

FORMATS = [f.value for f in EmbeddingFormat]


@contextmanager
def _input(path: Optional[str]) -> Generator[TextIO, None, None]:
    if path is None or path == "-":
        yield sys.stdin
    else:
        with open(path, encoding="utf-8") as f:
            yield f


def _queries(f: TextIO) -> Generator[list[str], None, None]:
    for line in f:
        parts = line.split()
        if parts:
            yield parts


def _engine(args, config: Config, logger: logging.Logger) -> QueryEngine:
    embeddings = read_embeddings(args.embeddings, args.format, args.lossy)
    return QueryEngine(
        embeddings,
        n_threads=config.n_threads,
        block_size=config.block_size,
        logger=logger,
        log_interval=config.log_interval,
    )


def _print_results(results, measure: str, out: TextIO):
    for r in results:
        out.write(f"{r.word}\t{r.score(measure):.6f}\n")


# ── Subcommands ────────────────────────────────────────────────────


def cmd_convert(args, config: Config, logger: logging.Logger) -> int:
    embeddings = read_embeddings(args.input, args.input_format, args.lossy)
    if args.metadata:
        embeddings = embeddings.with_metadata(load_metadata_file(args.metadata))
    write_embeddings(embeddings, args.output, args.output_format, args.unnormalize)
    return 0


def cmd_quantize(args, config: Config, logger: logging.Logger) -> int:
    embeddings = read_embeddings(args.input, args.input_format, args.lossy)
    quantized = quantize_embeddings(
        embeddings,
        quantizer=config.quantizer,
        n_subquantizers=config.n_subquantizers,
        quantizer_bits=config.quantizer_bits,
        n_iterations=config.n_iterations,
        n_attempts=config.n_attempts,
        n_samples=config.n_samples,
        seed=config.seed,
        n_threads=config.n_threads,
        logger=logger,
    )
    write_embeddings(quantized, args.output, EmbeddingFormat.FINALFUSION)
    return 0


def cmd_reconstruct(args, config: Config, logger: logging.Logger) -> int:
    embeddings = read_embeddings(args.input, EmbeddingFormat.FINALFUSION, args.lossy)
    write_embeddings(reconstruct(embeddings), args.output, EmbeddingFormat.FINALFUSION)
    return 0


def cmd_bucket_to_explicit(args, config: Config, logger: logging.Logger) -> int:
    embeddings = read_embeddings(args.input, args.input_format, args.lossy)
    write_embeddings(bucket_to_explicit(embeddings), args.output, EmbeddingFormat.FINALFUSION)
    return 0


def cmd_select(args, config: Config, logger: logging.Logger) -> int:
    embeddings = read_embeddings(args.input, args.input_format, args.lossy)
    with _input(args.words) as f:
        words = [w for parts in _queries(f) for w in parts]
    selected = select(embeddings, words, args.ignore_unknown, logger)
    write_embeddings(selected, args.output, args.output_format)
    return 0


def cmd_metadata(args, config: Config, logger: logging.Logger) -> int:
    metadata = read_metadata(args.input)
    if metadata is not None:
        text = metadata_to_toml(metadata)
        if args.output is None:
            sys.stdout.write(text)
        else:
            with atomic_output(args.output) as f:
                f.write(text.encode("utf-8"))
    else:
        logger.info(f"{args.input} has no metadata")
    return 0


def cmd_similar(args, config: Config, logger: logging.Logger) -> int:
    with _engine(args, config, logger) as engine, _input(args.input) as f:
        for parts in _queries(f):
            word = " ".join(parts)
            try:
                results = engine.similar(word, config.neighbors)
            except UnknownWord as e:
                logger.error(str(e))
                continue
            _print_results(results, config.similarity, sys.stdout)
    return 0


def cmd_analogy(args, config: Config, logger: logging.Logger) -> int:
    exclude = tuple(name not in args.include for name in ("a", "b", "c"))
    with _engine(args, config, logger) as engine, _input(args.input) as f:
        for parts in _queries(f):
            if len(parts) != 3:
                logger.warning(f"Query does not consist of three words: {' '.join(parts)}")
                continue
            try:
                results = engine.analogy(*parts, k=config.neighbors, exclude=exclude)
            except UnknownWord as e:
                logger.error(str(e))
                continue
            _print_results(results, config.similarity, sys.stdout)
    return 0


def cmd_compute_accuracy(args, config: Config, logger: logging.Logger) -> int:
    with _input(args.input) as f:
        instances = read_analogies(f)
    with _engine(args, config, logger) as engine:
        report = engine.compute_accuracy(instances)
    out = sys.stdout
    for c in report.categories:
        out.write(
            f"{c.category}: {c.n_correct}/{c.n_instances} correct, "
            f"accuracy: {c.accuracy * 100:.2f}%, avg cos: {c.avg_cosine:.2f}, "
            f"skipped: {c.n_skipped}\n"
        )
    out.write(
        f"Total: {report.n_correct}/{report.n_instances} correct, "
        f"accuracy: {report.accuracy * 100:.2f}%, avg cos: {report.avg_cosine:.2f}\n"
    )
    out.write(
        f"Skipped: {report.n_skipped}/{report.n_instances + report.n_skipped} "
        f"({report.skipped_ratio:.2%})\n"
    )
    return 0


# ── Parser ─────────────────────────────────────────────────────────


def _io_args(p: argparse.ArgumentParser, input_format: Optional[str] = "finalfusion"):
    p.add_argument("input", help="Input embeddings")
    p.add_argument("output", help="Output embeddings")
    if input_format is not None:
        p.add_argument("-f", "--from", dest="input_format", choices=FORMATS, default=input_format)
    p.add_argument("--lossy", action="store_true", help="Replace invalid UTF-8 in words")


def _query_args(p: argparse.ArgumentParser, default_format: str = "finalfusion"):
    p.add_argument("embeddings", help="Embeddings file")
    p.add_argument("input", nargs="?", help="Query file (default: stdin)")
    p.add_argument("-f", "--format", choices=FORMATS, default=default_format)
    p.add_argument("--lossy", action="store_true", help="Replace invalid UTF-8 in words")
    p.add_argument("-k", "--neighbors", type=int, help="Number of results per query")
    p.add_argument("-s", "--similarity", choices=SIMILARITY_MEASURES)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ffutils", description="Word embedding utilities")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--threads", dest="n_threads", type=int, help="Worker threads")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("convert", help="Convert between embedding formats")
    _io_args(p, input_format="word2vec")
    p.add_argument("-t", "--to", dest="output_format", choices=FORMATS, default="finalfusion")
    p.add_argument("-m", "--metadata", help="TOML file with metadata to store")
    p.add_argument("--unnormalize", action="store_true", help="Restore original norms")
    p.set_defaults(handler=cmd_convert)

    p = sub.add_parser("quantize", help="Product-quantize embeddings")
    _io_args(p)
    p.add_argument("-q", "--quantizer", choices=QUANTIZERS)
    p.add_argument("-s", "--subquantizers", dest="n_subquantizers", type=int)
    p.add_argument("-b", "--bits", dest="quantizer_bits", type=int)
    p.add_argument("-i", "--iterations", dest="n_iterations", type=int)
    p.add_argument("-a", "--attempts", dest="n_attempts", type=int)
    p.add_argument("--samples", dest="n_samples", type=int, help="Rows used for training")
    p.add_argument("--seed", type=int)
    p.set_defaults(handler=cmd_quantize)

    p = sub.add_parser("reconstruct", help="Reconstruct quantized embeddings")
    _io_args(p, input_format=None)
    p.set_defaults(handler=cmd_reconstruct)

    p = sub.add_parser("bucket-to-explicit", help="Convert bucketed subwords to explicit n-grams")
    _io_args(p)
    p.set_defaults(handler=cmd_bucket_to_explicit)

    p = sub.add_parser("select", help="Keep only the listed words")
    _io_args(p)
    p.add_argument("words", nargs="?", help="Word list (default: stdin)")
    p.add_argument("-t", "--to", dest="output_format", choices=FORMATS, default="finalfusion")
    p.add_argument("--ignore-unknown", action="store_true")
    p.set_defaults(handler=cmd_select)

    p = sub.add_parser("metadata", help="Print embedding metadata")
    p.add_argument("input", help="Embeddings file")
    p.add_argument("output", nargs="?", help="TOML output file (default: stdout)")
    p.set_defaults(handler=cmd_metadata)

    p = sub.add_parser("similar", help="Nearest neighbors of words")
    _query_args(p)
    p.set_defaults(handler=cmd_similar)

    p = sub.add_parser("analogy", help="Solve analogies a : b :: c : ?")
    _query_args(p)
    p.add_argument(
        "--include",
        choices=("a", "b", "c"),
        action="append",
        default=[],
        help="Allow this query word among the answers",
    )
    p.set_defaults(handler=cmd_analogy)

    p = sub.add_parser("compute-accuracy", help="Evaluate an analogy data set")
    _query_args(p)
    p.set_defaults(handler=cmd_compute_accuracy)

    return parser


_OVERRIDES = (
    "n_threads",
    "neighbors",
    "similarity",
    "quantizer",
    "n_subquantizers",
    "quantizer_bits",
    "n_iterations",
    "n_attempts",
    "n_samples",
    "seed",
)


def resolve_config(args: argparse.Namespace) -> Config:
    config = Config.load(args.config) if args.config else Config()
    values = {k: getattr(args, k) for k in _OVERRIDES if getattr(args, k, None) is not None}
    return replace(config, **values)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    logger = logging.getLogger("ffutils")

    try:
        config = resolve_config(args)
        return args.handler(args, config, logger)
    except (EmbeddingError, OSError, ValueError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
