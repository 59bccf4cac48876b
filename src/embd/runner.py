from __future__ import annotations

import contextlib
import logging
import pathlib
import sys
from collections.abc import Iterator, Sequence
from typing import NamedTuple, TextIO

from embd import engine
from embd.cli_args import parse_args
from embd.config import Config
from embd.engine import (
    BadToken,
    ContextFull,
    ContextSize,
    HyperparametersLoaded,
    InferenceParameters,
    LoadProgress,
    LoadProgressCallback,
    MemorySize,
    Model,
    PartLoaded,
    PartLoading,
    PartTensorLoaded,
    Vocab,
)
from embd.errors import EmbdError, OutputFileError
from embd.logging_setup import configure_logging
from embd.prompts import resolve_prompts

logger = logging.getLogger(__name__)

# Only every Nth loaded tensor is logged.
TENSOR_LOG_INTERVAL = 8
MIB = 1024 * 1024


class RunSummary(NamedTuple):
    prompts: int
    embedded: int
    skipped: int


def make_progress_logger(
    tensor_log_interval: int = TENSOR_LOG_INTERVAL,
) -> LoadProgressCallback:
    def _log_progress(progress: LoadProgress) -> None:
        match progress:
            case HyperparametersLoaded(hyperparameters=hparams):
                logger.debug("Loaded hyperparameters %r", hparams)
            case BadToken(index=index):
                logger.info("Warning: Bad token in vocab at index %d", index)
            case ContextSize(bytes=size):
                logger.info("Context size = %.2f MiB", size / MIB)
            case MemorySize(bytes=size, n_mem=n_mem):
                logger.info("Memory size: %.2f MiB %d", size / MIB, n_mem)
            case PartLoading(
                file=file,
                current_part=current_part,
                total_parts=total_parts,
            ):
                logger.info(
                    "Loading model part %d/%d from '%s'",
                    current_part,
                    total_parts,
                    file,
                )
            case PartTensorLoaded(
                current_tensor=current_tensor,
                tensor_count=tensor_count,
            ):
                if current_tensor % tensor_log_interval == 0:
                    logger.info(
                        "Loaded tensor %d/%d",
                        current_tensor,
                        tensor_count,
                    )
            case PartLoaded(
                file=file,
                byte_size=byte_size,
                tensor_count=tensor_count,
            ):
                logger.info("Loading of '%s' complete", file)
                logger.info(
                    "Model size = %.2f MiB / num tensors = %d",
                    byte_size / MIB,
                    tensor_count,
                )

    return _log_progress


def inference_parameters(config: Config) -> InferenceParameters:
    return InferenceParameters(
        n_threads=config.num_threads,
        n_batch=config.batch_size,
        seed=config.seed,
    )


def load_model(config: Config) -> tuple[Model, Vocab]:
    model, vocab = engine.load(
        config.model_path,
        config.num_ctx_tokens,
        make_progress_logger(),
        device=config.device,
    )
    logger.info("Model fully loaded!")

    return model, vocab


@contextlib.contextmanager
def _create_output_file(path: pathlib.Path) -> Iterator[TextIO]:
    try:
        file = path.open("w", encoding="utf-8")
    except OSError as e:
        raise OutputFileError(
            f"Could not create output file at {path}. Error {e}",
        ) from e

    with file:
        yield file


def _write_embedding(
    output: TextIO,
    line: str,
    *,
    index: int,
) -> None:
    try:
        output.write(line + "\n")
        output.flush()
    except OSError as e:
        logger.error(
            "Could not write the embedding for prompt %d to %s: %s",
            index,
            output.name,
            e,
        )


def run_embeddings(config: Config, prompts: Sequence[str]) -> RunSummary:
    """
    Load the model and embed every prompt in order, printing stats to
    stdout and writing one vector per line to the output file if set.

    Failing to load the model or create the output file is fatal. A
    prompt which doesn't fit in the context is skipped.
    """
    params = inference_parameters(config)
    model, vocab = load_model(config)
    embedded = 0

    with contextlib.ExitStack() as stack:
        output: TextIO | None = None

        if config.output_file is not None:
            output = stack.enter_context(
                _create_output_file(config.output_file),
            )

        if config.prompt_file is None:
            print()

        for index, prompt in enumerate(prompts, start=1):
            logger.debug("Embedding prompt %d/%d", index, len(prompts))
            session = model.start_session(0)

            try:
                stats = session.embed_prompt(model, vocab, params, prompt)
            except ContextFull:
                logger.warning(
                    "Context window full, skipping prompt %d/%d",
                    index,
                    len(prompts),
                )
                continue

            print(stats, flush=True)
            embedded += 1

            if output is not None:
                _write_embedding(output, stats.embedding_string(), index=index)

    summary = RunSummary(
        prompts=len(prompts),
        embedded=embedded,
        skipped=len(prompts) - embedded,
    )
    logger.info(
        "Embedding run complete prompts=%d embedded=%d skipped=%d",
        summary.prompts,
        summary.embedded,
        summary.skipped,
    )

    return summary


def run_from_config(config: Config) -> RunSummary:
    configure_logging(
        config.logging,
        component="embd",
        level_override=config.log_level,
    )
    prompts = resolve_prompts(config.prompt, config.prompt_file)

    return run_embeddings(config, prompts)


def main(argv: Sequence[str] | None = None) -> None:
    config = parse_args(argv)

    try:
        run_from_config(config)
    except EmbdError as e:
        logger.error("%s", e)
        sys.exit(1)
