import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

import structlog
from ddtrace.trace import tracer
from typing_extensions import override

from ..tracing import tag_span
from .configuration import EmbeddingSettings
from .retry import NonRetriableError

logger = structlog.get_logger()

EmbeddingVector: TypeAlias = list[float]

InputType = Literal["document", "query"]

# provider status codes that retrying cannot fix
NON_RETRIABLE_STATUS = frozenset({400, 401, 403, 404, 422})


class EmbeddingError(Exception):
    """A retriable failure of the embedding API (rate limit, 5xx, timeout)."""


class EmbeddingInputError(EmbeddingError, NonRetriableError):
    """The request itself is malformed and must not be retried."""


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response"""

    embeddings: list[EmbeddingVector]
    usage: Usage


def estimate_token_length(text: str) -> float:
    """
    Estimates token count based on UTF-8 byte length, 0.25 tokens per byte.
    """
    return len(text.encode("utf-8")) * 0.25


def batch_indices(
    token_lengths: list[int],
    max_texts_per_batch: int,
    max_tokens_per_batch: int | None,
) -> list[tuple[int, int]]:
    """
    Given the token length of each text, determines how to split them into
    API calls that stay under both 'max_texts_per_batch' and
    'max_tokens_per_batch'. A text longer than the token budget is sent on
    its own and left for the provider to truncate.

    Returns a list of ``(start, end)`` slices, in input order
    """
    batches: list[tuple[int, int]] = []
    start = 0
    token_count = 0
    for idx, tokens in enumerate(token_lengths):
        max_tokens_reached = (
            max_tokens_per_batch is not None
            and token_count + tokens > max_tokens_per_batch
        )
        max_texts_reached = idx - start + 1 > max_texts_per_batch
        if idx > start and (max_tokens_reached or max_texts_reached):
            batches.append((start, idx))
            start = idx
            token_count = 0
        token_count += tokens
    if start < len(token_lengths):
        batches.append((start, len(token_lengths)))
    return batches


class ApiKeyMixin:
    """
    A mixin class that provides functionality for managing API keys.

    Attributes:
        api_key_name (str): The name of the API key attribute.
    """

    api_key_name: str | None = None
    _api_key_: str | None = None

    @property
    def _api_key(self) -> str:
        if self._api_key_ is None:
            raise ValueError("API key not set")
        return self._api_key_

    def set_api_key(self, secrets: dict[str, str | None] | Any):
        """
        Sets the API key from a mapping such as ``os.environ``.

        Raises:
            ValueError: If the API key is missing from the secrets.
        """
        api_key = (
            secrets.get(self.api_key_name, None)
            if self.api_key_name is not None
            else None
        )
        if not api_key:
            raise ValueError(f"missing API key: {self.api_key_name}")
        self._api_key_ = api_key


class EmbeddingStats:
    """
    Tracks totals across every embedding request made by one client.

    Attributes:
        total_request_time (float): Seconds spent waiting on the API.
        total_texts (int): Texts embedded successfully.
        total_tokens (int): Tokens billed by the provider.
    """

    def __init__(self):
        self.total_request_time = 0.0
        self.total_texts = 0
        self.total_tokens = 0
        self.requests = 0

    def add_request(self, duration: float, text_count: int, tokens: int):
        self.requests += 1
        self.total_request_time += duration
        self.total_texts += text_count
        self.total_tokens += tokens

    def texts_per_second(self) -> float:
        return (
            self.total_texts / self.total_request_time
            if self.total_request_time > 0
            else 0
        )

    async def print_stats(self):
        await logger.adebug(
            "Embedding stats",
            requests=self.requests,
            total_request_time=self.total_request_time,
            total_texts=self.total_texts,
            total_tokens=self.total_tokens,
            texts_per_second=self.texts_per_second(),
        )


class Embedder(ABC):
    """
    Abstract base class for an embedding client.

    Subclasses talk to one provider in ``call_embed_api``; batching limits
    and input validation live here so every provider rejects malformed
    batches the same way, before any network I/O.
    """

    dimensions: int

    def __init__(self):
        self.stats = EmbeddingStats()

    @abstractmethod
    def _max_chunks_per_batch(self) -> int:
        """
        The maximum number of texts that can be embedded per API call
        """

    def _max_input_tokens(self) -> int | None:
        """
        The number of tokens the provider keeps from a single text, if it
        truncates longer ones
        """
        return None

    def _max_tokens_per_batch(self) -> int | None:
        """
        The maximum number of tokens that can be embedded per API call
        """
        return None

    def _estimated_tokens(self, text: str) -> int:
        tokens = math.ceil(estimate_token_length(text))
        max_input = self._max_input_tokens()
        if max_input is not None:
            tokens = min(tokens, max_input)
        return tokens

    @abstractmethod
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        """
        Call the embed API

        Raises:
            EmbeddingInputError: The provider rejected the request.
            EmbeddingError: Any other provider failure.
        """

    def validate_batch(self, texts: list[str]) -> None:
        if not texts:
            raise EmbeddingInputError("cannot embed an empty batch")
        limit = self._max_chunks_per_batch()
        if len(texts) > limit:
            raise EmbeddingInputError(
                f"batch of {len(texts)} texts exceeds the limit of {limit}"
            )
        for i, text in enumerate(texts):
            if not text.strip():
                raise EmbeddingInputError(f"text {i} is empty")

    async def embed_batch(
        self, texts: list[str], input_type: InputType = "document"
    ) -> EmbeddingResponse:
        """
        Embeds ``texts``, splitting them over several API calls when they
        would exceed the provider's per-request token budget.

        Returns:
            EmbeddingResponse: One vector per text, in input order, and the
            tokens billed across all calls.
        """
        self.validate_batch(texts)
        token_lengths = [self._estimated_tokens(text) for text in texts]
        embeddings: list[EmbeddingVector] = []
        prompt_tokens = 0
        total_tokens = 0
        with tracer.trace("embeddings.embed_batch"):
            tag_span(**{"batch.texts.total": len(texts), "input_type": input_type})
            for start, end in batch_indices(
                token_lengths,
                self._max_chunks_per_batch(),
                self._max_tokens_per_batch(),
            ):
                request = texts[start:end]
                start_time = time.perf_counter()
                response = await self.call_embed_api(request, input_type)
                request_duration = time.perf_counter() - start_time
                tag_span(
                    **{
                        "embeddings.create_request.time.seconds": request_duration,
                        "batch.tokens.total": response.usage.total_tokens,
                    }
                )
                self.stats.add_request(
                    request_duration,
                    len(response.embeddings),
                    response.usage.total_tokens,
                )
                await logger.adebug(
                    "embedding request finished",
                    texts=len(request),
                    seconds=request_duration,
                    tokens=response.usage.total_tokens,
                )
                embeddings.extend(response.embeddings)
                prompt_tokens += response.usage.prompt_tokens
                total_tokens += response.usage.total_tokens
        return EmbeddingResponse(
            embeddings=embeddings,
            usage=Usage(prompt_tokens=prompt_tokens, total_tokens=total_tokens),
        )

    async def embed(
        self, text: str, input_type: InputType = "document"
    ) -> EmbeddingVector:
        response = await self.embed_batch([text], input_type)
        if len(response.embeddings) != 1:
            raise EmbeddingError(
                f"expected 1 embedding, received {len(response.embeddings)}"
            )
        return response.embeddings[0]


def voyage_max_tokens_per_batch(model: str) -> int:
    if model in ("voyage-3.5-lite", "voyage-3-lite"):
        return 1_000_000
    if model in ("voyage-3.5", "voyage-2", "voyage-3"):
        return 320_000
    return 120_000


def _is_non_retriable(error: Exception) -> bool:
    import voyageai.error

    if isinstance(
        error, voyageai.error.InvalidRequestError | voyageai.error.AuthenticationError
    ):
        return True
    return getattr(error, "http_status", None) in NON_RETRIABLE_STATUS


class VoyageAIEmbedder(ApiKeyMixin, Embedder):
    """
    Embedding client for the Voyage AI API.

    The SDK's own retries are disabled; callers wrap ``embed_batch`` with
    ``with_retry``. Texts longer than the model's context are truncated by
    the API instead of being rejected.

    Args:
        settings: Model, dimensions and batch limits.
        api_key: Explicit key; read from ``settings.api_key_name`` in the
            environment when omitted.
    """

    def __init__(
        self, settings: EmbeddingSettings | None = None, api_key: str | None = None
    ):
        super().__init__()
        self.settings = settings or EmbeddingSettings()
        self.model = self.settings.model
        self.dimensions = self.settings.dimensions
        self.api_key_name = self.settings.api_key_name
        if api_key is not None:
            self._api_key_ = api_key

    @override
    def _max_chunks_per_batch(self) -> int:
        return self.settings.batch_limit

    @override
    def _max_input_tokens(self) -> int | None:
        return self.settings.max_input_tokens

    @override
    def _max_tokens_per_batch(self) -> int | None:
        return voyage_max_tokens_per_batch(self.model)

    @override
    async def call_embed_api(
        self, documents: list[str], input_type: InputType
    ) -> EmbeddingResponse:
        # Note: deferred import to avoid import overhead
        import voyageai

        client = voyageai.AsyncClient(api_key=self._api_key, max_retries=0)
        try:
            response = await client.embed(
                documents,
                model=self.model,
                input_type=input_type,
                truncation=True,
            )
        except Exception as e:
            if _is_non_retriable(e):
                raise EmbeddingInputError(f"voyage rejected the request: {e}") from e
            raise EmbeddingError(f"voyage embedding request failed: {e}") from e

        usage = Usage(
            prompt_tokens=response.total_tokens,
            total_tokens=response.total_tokens,
        )
        return EmbeddingResponse(embeddings=response.embeddings, usage=usage)
