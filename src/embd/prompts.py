from __future__ import annotations

import logging
import pathlib

from embd.errors import PromptFileError

logger = logging.getLogger(__name__)

FALLBACK_PROMPT = "The quick brown fox jumps over the lazy dog."


def read_prompt_file(path: pathlib.Path) -> tuple[str, ...]:
    """
    Read prompts from a UTF-8 file with one prompt per line.

    Both LF and CRLF line endings are accepted. Empty lines are kept as
    empty prompts, but a final line ending does not start a new prompt.
    """
    try:
        # Bare carriage returns stay inside a prompt.
        with path.open(encoding="utf-8", newline="") as file:
            text = file.read()
    except (OSError, UnicodeDecodeError) as e:
        raise PromptFileError(
            f"Could not read prompt file at {path}. Error {e}",
        ) from e

    lines = text.split("\n")

    if len(lines) > 1 and lines[-1] == "":
        lines.pop()

    return tuple(line.removesuffix("\r") for line in lines)


def resolve_prompts(
    prompt: str | None,
    prompt_file: pathlib.Path | None,
) -> tuple[str, ...]:
    if prompt_file is not None:
        prompts = read_prompt_file(prompt_file)
        logger.info("Read %d prompts from %s", len(prompts), prompt_file)

        return prompts

    if prompt is not None:
        return (prompt,)

    logger.error("No prompt or prompt file was provided. See --help")

    return (FALLBACK_PROMPT,)
