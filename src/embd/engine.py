"""
A small inference engine interface over sentence-transformers.

A model is loaded once from a local directory with ``load``, reporting
progress through a callback, and prompts are then embedded one session at
a time:

    model, vocab = load(path, 512, print)
    session = model.start_session(0)
    stats = session.embed_prompt(model, vocab, InferenceParameters(), "hi")
"""
from __future__ import annotations

import datetime
import pathlib
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, NamedTuple

from embd.errors import ModelLoadError

# Avoid loading sentence transformers until needed.
if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

Vector = tuple[float, ...]

# Bytes per element of the attention key/value memory.
MEMORY_ELEMENT_SIZE = 4


class Hyperparameters(NamedTuple):
    n_vocab: int
    n_embd: int
    n_layer: int
    n_head: int
    n_ctx: int


class HyperparametersLoaded(NamedTuple):
    hyperparameters: Hyperparameters


class BadToken(NamedTuple):
    index: int


class ContextSize(NamedTuple):
    bytes: int


class MemorySize(NamedTuple):
    bytes: int
    n_mem: int


class PartLoading(NamedTuple):
    file: pathlib.Path
    current_part: int
    total_parts: int


class PartTensorLoaded(NamedTuple):
    file: pathlib.Path
    current_tensor: int
    tensor_count: int


class PartLoaded(NamedTuple):
    file: pathlib.Path
    byte_size: int
    tensor_count: int


LoadProgress = (
    HyperparametersLoaded
    | BadToken
    | ContextSize
    | MemorySize
    | PartLoading
    | PartTensorLoaded
    | PartLoaded
)
LoadProgressCallback = Callable[[LoadProgress], None]
TokenCallback = Callable[[int], None]


class InferenceError(Exception):
    pass


class ContextFull(InferenceError):
    """The prompt does not fit in the session's remaining context."""


class UserCallbackError(InferenceError):
    """A callback given to the engine raised an exception."""


class InferenceParameters(NamedTuple):
    n_threads: int = 8
    n_batch: int = 8
    seed: int | None = None
    normalize: bool = True


class EmbedStats(NamedTuple):
    feed_prompt_duration: datetime.timedelta
    prompt_tokens: int
    embedding: Vector

    def __str__(self) -> str:
        milliseconds = self.feed_prompt_duration / datetime.timedelta(
            milliseconds=1,
        )

        return "\n".join(
            [
                f"feed_prompt_duration: {milliseconds:.0f}ms",
                f"prompt_tokens: {self.prompt_tokens}",
                f"embedding_size: {len(self.embedding)}",
            ],
        )

    def embedding_string(self) -> str:
        return " ".join(str(value) for value in self.embedding)


class Vocab:
    def __init__(self, tokenizer: Any) -> None:
        self._tokenizer = tokenizer
        self.token_to_id: dict[str, int] = dict(tokenizer.get_vocab())
        self.id_to_token: dict[int, str] = {
            token_id: token for token, token_id in self.token_to_id.items()
        }

    def __len__(self) -> int:
        return len(self.token_to_id)

    def tokenize(self, text: str) -> list[int]:
        return [int(token_id) for token_id in self._tokenizer.encode(text)]


class Model:
    def __init__(
        self,
        transformer: SentenceTransformer,
        hyperparameters: Hyperparameters,
    ) -> None:
        self._transformer = transformer
        self.hyperparameters = hyperparameters

    @property
    def n_ctx(self) -> int:
        return self.hyperparameters.n_ctx

    def start_session(self, n_past: int = 0) -> Session:
        return Session(n_past)

    def encode(self, prompt: str, params: InferenceParameters) -> Vector:
        _configure_torch(params)

        tensors = self._transformer.encode(  # type: ignore
            [prompt],
            batch_size=params.n_batch,
            convert_to_numpy=True,
            normalize_embeddings=params.normalize,
            show_progress_bar=False,
        )

        return tuple(float(x) for x in tensors[0])


class Session:
    """
    State for embedding a single prompt. Sessions are cheap to create, and
    a fresh one should be started for every prompt.
    """
    def __init__(self, n_past: int = 0) -> None:
        self.n_past = n_past
        self.tokens: list[int] = []

    def embed_prompt(
        self,
        model: Model,
        vocab: Vocab,
        params: InferenceParameters,
        prompt: str,
        callback: TokenCallback | None = None,
    ) -> EmbedStats:
        start = time.perf_counter()
        tokens = vocab.tokenize(prompt)

        if self.n_past + len(tokens) > model.n_ctx:
            raise ContextFull(
                f"{len(tokens)} prompt tokens do not fit in the context "
                f"({self.n_past}/{model.n_ctx} used)",
            )

        if callback is not None:
            for token in tokens:
                try:
                    callback(token)
                except Exception as e:
                    raise UserCallbackError(e) from e

        embedding = model.encode(prompt, params)
        self.tokens.extend(tokens)
        self.n_past += len(tokens)

        return EmbedStats(
            feed_prompt_duration=datetime.timedelta(
                seconds=time.perf_counter() - start,
            ),
            prompt_tokens=len(tokens),
            embedding=embedding,
        )


def _configure_torch(params: InferenceParameters) -> None:
    import torch

    if torch.get_num_threads() != params.n_threads:
        torch.set_num_threads(params.n_threads)

    if params.seed is not None:
        torch.manual_seed(params.seed)


def _load_sentence_transformer(
    path: pathlib.Path,
    device: str,
) -> SentenceTransformer:
    from sentence_transformers import SentenceTransformer

    transformer = SentenceTransformer(str(path), device=device)
    transformer.eval()

    return transformer


def _config_int(config: object, *names: str) -> int:
    for name in names:
        value = getattr(config, name, None)

        if isinstance(value, int):
            return value

    return 0


def _read_hyperparameters(
    transformer: Any,
    vocab: Vocab,
    n_ctx_tokens: int,
) -> Hyperparameters:
    auto_model = getattr(transformer[0], "auto_model", None)
    config = getattr(auto_model, "config", None)
    tokenizer = getattr(transformer, "tokenizer", None)
    n_ctx = n_ctx_tokens

    # Positions past the model's limit would be truncated silently.
    for limit in (
        getattr(transformer, "max_seq_length", None),
        getattr(tokenizer, "model_max_length", None),
    ):
        if isinstance(limit, int) and limit > 0:
            n_ctx = min(n_ctx, limit)

    return Hyperparameters(
        n_vocab=_config_int(config, "vocab_size") or len(vocab),
        n_embd=_config_int(config, "hidden_size", "d_model", "dim"),
        n_layer=_config_int(config, "num_hidden_layers", "n_layers"),
        n_head=_config_int(config, "num_attention_heads", "n_heads"),
        n_ctx=n_ctx,
    )


def _tensor_bytes(tensors: Mapping[str, Any]) -> int:
    return sum(
        tensor.numel() * tensor.element_size() for tensor in tensors.values()
    )


def load(
    path: str | pathlib.Path,
    n_ctx_tokens: int,
    load_progress_callback: LoadProgressCallback,
    *,
    device: str = "cpu",
) -> tuple[Model, Vocab]:
    """
    Load a sentence-transformers model from a local directory.

    Progress is reported through ``load_progress_callback`` in the order
    hyperparameters, bad vocab tokens, context and memory sizes, then the
    weights tensor by tensor.
    """
    model_path = pathlib.Path(path)

    if not model_path.exists():
        raise ModelLoadError(f"Model path does not exist: {model_path}")

    try:
        transformer = _load_sentence_transformer(model_path, device)
    except (OSError, ValueError, RuntimeError) as e:
        raise ModelLoadError(
            f"Could not load model from {model_path}: {e}",
        ) from e

    try:
        vocab = Vocab(transformer.tokenizer)
        hparams = _read_hyperparameters(transformer, vocab, n_ctx_tokens)
    except (AttributeError, IndexError, TypeError) as e:
        raise ModelLoadError(
            f"Model at {model_path} has no usable tokenizer: {e}",
        ) from e

    transformer.max_seq_length = hparams.n_ctx
    load_progress_callback(HyperparametersLoaded(hparams))

    for index in range(hparams.n_vocab):
        if index not in vocab.id_to_token:
            load_progress_callback(BadToken(index=index))

    tensors = transformer.state_dict()
    byte_size = _tensor_bytes(tensors)
    load_progress_callback(ContextSize(bytes=byte_size))

    n_mem = hparams.n_layer * hparams.n_ctx
    load_progress_callback(
        MemorySize(
            bytes=2 * n_mem * hparams.n_embd * MEMORY_ELEMENT_SIZE,
            n_mem=n_mem,
        ),
    )

    load_progress_callback(
        PartLoading(file=model_path, current_part=1, total_parts=1),
    )

    for current_tensor in range(1, len(tensors) + 1):
        load_progress_callback(
            PartTensorLoaded(
                file=model_path,
                current_tensor=current_tensor,
                tensor_count=len(tensors),
            ),
        )

    load_progress_callback(
        PartLoaded(
            file=model_path,
            byte_size=byte_size,
            tensor_count=len(tensors),
        ),
    )

    return Model(transformer, hparams), vocab
