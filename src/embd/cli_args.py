from __future__ import annotations

import argparse
import importlib.metadata
import os
import pathlib
from collections.abc import Sequence

import psutil

from embd.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_DEVICE,
    DEFAULT_NUM_CTX_TOKENS,
    MAX_SEED,
    Config,
    Settings,
    default_settings,
    load_settings,
)

PROG = "embd"


def physical_cpu_count() -> int:
    """
    Get the number of physical CPU cores, or the logical count where the
    platform cannot tell them apart.
    """
    return psutil.cpu_count(logical=False) or os.cpu_count() or 1


def package_version() -> str:
    try:
        return importlib.metadata.version(PROG)
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid positive integer: {value!r}",
        ) from None

    if number <= 0:
        raise argparse.ArgumentTypeError(
            f"must be greater than zero: {value!r}",
        )

    return number


def _seed(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid seed: {value!r}",
        ) from None

    if not 0 <= number <= MAX_SEED:
        raise argparse.ArgumentTypeError(
            f"seed must be an unsigned 64-bit integer: {value!r}",
        )

    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description=(
            "Compute embeddings for one or more prompts with a model "
            "loaded from disk."
        ),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {package_version()}",
    )
    parser.add_argument(
        "-m",
        "--model-path",
        type=pathlib.Path,
        required=True,
        help="Where to load the model from",
    )
    parser.add_argument(
        "-p",
        "--prompt",
        default=None,
        help="The prompt to embed",
    )
    parser.add_argument(
        "-f",
        "--prompt-file",
        type=pathlib.Path,
        default=None,
        help=(
            "A file to read prompts from, one per line. "
            "Takes precedence over --prompt if set."
        ),
    )
    parser.add_argument(
        "-o",
        "--output-file",
        type=pathlib.Path,
        default=None,
        help=(
            "File to write embedding vectors to, one line per prompt. "
            "Vectors are not written if this is not set."
        ),
    )
    parser.add_argument(
        "-t",
        "--num-threads",
        type=_positive_int,
        default=None,
        help="Number of threads to use (default: physical CPU cores)",
    )
    parser.add_argument(
        "--num-ctx-tokens",
        type=_positive_int,
        default=None,
        help=(
            "Size of the context in tokens. Allows feeding longer prompts "
            f"at the cost of memory. (default: {DEFAULT_NUM_CTX_TOKENS})"
        ),
    )
    parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=None,
        help=(
            "How many inputs to feed the model at once "
            f"(default: {DEFAULT_BATCH_SIZE})"
        ),
    )
    parser.add_argument(
        "--seed",
        type=_seed,
        default=None,
        help=(
            "Seed for torch random state. The same seed may still give "
            "different results on different hardware."
        ),
    )
    parser.add_argument(
        "--device",
        default=None,
        help=f"torch device to run the model on (default: {DEFAULT_DEVICE})",
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        default=None,
        help="Path to a config.toml supplying default settings",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level, overriding EMBD_LOG and the config file",
    )

    return parser


def parse_args(argv: Sequence[str] | None = None) -> Config:
    """
    Parse command line arguments into a Config.

    Usage errors print to stderr and exit with status 2.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = _read_settings(parser, args.config)
    embed = settings.embed

    num_threads = args.num_threads or embed.num_threads

    if num_threads is None:
        num_threads = physical_cpu_count()

    seed = args.seed if args.seed is not None else embed.seed

    return Config(
        model_path=args.model_path,
        prompt=args.prompt,
        prompt_file=args.prompt_file,
        output_file=args.output_file,
        num_threads=num_threads,
        num_ctx_tokens=args.num_ctx_tokens or embed.num_ctx_tokens,
        batch_size=args.batch_size or embed.batch_size,
        seed=seed,
        device=args.device or embed.device,
        logging=settings.logging,
        log_level=args.log_level,
    )


def _read_settings(
    parser: argparse.ArgumentParser,
    path: pathlib.Path | None,
) -> Settings:
    if path is None:
        return default_settings()

    try:
        return load_settings(path)
    except (OSError, ValueError) as e:
        # tomllib.TOMLDecodeError is a ValueError.
        parser.error(f"could not read config file {str(path)!r}: {e}")
