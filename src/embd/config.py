from __future__ import annotations

import pathlib
import tomllib
from typing import Any, NamedTuple, cast

DEFAULT_NUM_CTX_TOKENS = 512
DEFAULT_BATCH_SIZE = 8
DEFAULT_DEVICE = "cpu"
MAX_SEED = 2**64 - 1


class LoggingSettings(NamedTuple):
    level: str
    file_path: pathlib.Path | None


class EmbedSettings(NamedTuple):
    # None means "probe the physical CPU count".
    num_threads: int | None
    num_ctx_tokens: int
    batch_size: int
    seed: int | None
    device: str


class Settings(NamedTuple):
    embed: EmbedSettings
    logging: LoggingSettings


class Config(NamedTuple):
    """
    The validated configuration for one run, built once at startup from the
    command line and an optional settings file.
    """
    model_path: pathlib.Path
    prompt: str | None
    prompt_file: pathlib.Path | None
    output_file: pathlib.Path | None
    num_threads: int
    num_ctx_tokens: int
    batch_size: int
    seed: int | None
    device: str
    logging: LoggingSettings
    # Set by --log-level, wins over EMBD_LOG and the settings file.
    log_level: str | None = None


def default_settings() -> Settings:
    return Settings(
        embed=EmbedSettings(
            num_threads=None,
            num_ctx_tokens=DEFAULT_NUM_CTX_TOKENS,
            batch_size=DEFAULT_BATCH_SIZE,
            seed=None,
            device=DEFAULT_DEVICE,
        ),
        logging=LoggingSettings(level="INFO", file_path=None),
    )


def _as_dict(value: object) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return cast(dict[str, Any], value)

    return None


def _parse_path(value: object) -> pathlib.Path | None:
    if not isinstance(value, str):
        return None

    trimmed = value.strip()

    if not trimmed:
        return None

    return pathlib.Path(trimmed).expanduser()


def _parse_positive_int(value: object) -> int | None:
    # bool is an int subclass, but `true` is never a thread count.
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value

    return None


def _parse_seed(value: object) -> int | None:
    if (
        isinstance(value, int)
        and not isinstance(value, bool)
        and 0 <= value <= MAX_SEED
    ):
        return value

    return None


def load_settings(path: str | pathlib.Path) -> Settings:
    config_path = pathlib.Path(path)

    with config_path.open("rb") as file:
        data = tomllib.load(file)

    defaults = default_settings()

    embed_data: dict[str, Any] = _as_dict(data.get("embed")) or {}
    device = str(embed_data.get("device", DEFAULT_DEVICE)).strip()

    embed_settings = EmbedSettings(
        num_threads=_parse_positive_int(embed_data.get("num_threads")),
        num_ctx_tokens=(
            _parse_positive_int(embed_data.get("num_ctx_tokens"))
            or defaults.embed.num_ctx_tokens
        ),
        batch_size=(
            _parse_positive_int(embed_data.get("batch_size"))
            or defaults.embed.batch_size
        ),
        seed=_parse_seed(embed_data.get("seed")),
        device=device or DEFAULT_DEVICE,
    )

    logging_data: dict[str, Any] = _as_dict(data.get("logging")) or {}
    level = str(logging_data.get("level", "INFO")).strip().upper()

    if not level:
        level = "INFO"

    logging_settings = LoggingSettings(
        level=level,
        file_path=_parse_path(logging_data.get("file")),
    )

    return Settings(embed=embed_settings, logging=logging_settings)
