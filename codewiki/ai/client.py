"""AI client wrapper for embeddings and generation with multi-provider support."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from codewiki.config import Settings
from codewiki.errors import EmbeddingProviderError, WikiGenerationError
from .embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)

# Together.ai bge-base accepts 512 tokens; OpenAI text-embedding-3 accepts 8191
TOGETHER_MAX_CHARS = 2000
OPENAI_MAX_CHARS = 8000

_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


def truncate_for_embedding(text: str, max_chars: int = 1500) -> str:
    """Truncate text to fit within embedding model token limits."""
    if not text:
        return text

    if len(text) <= max_chars:
        return text

    return text[:max_chars]


@dataclass
class EmbeddingResult:
    """Result from embedding request."""
    embeddings: List[List[float]]
    model: str
    usage: Dict[str, int]
    provider: str = "unknown"


@dataclass
class GenerationResult:
    """Result from generation request."""
    text: str
    model: str
    usage: Dict[str, int]
    finish_reason: str
    provider: str = "unknown"


class AIClient(EmbeddingProvider):
    """
    Async client for OpenAI-compatible embedding and chat APIs.

    Embeddings always come from one provider, chosen at construction
    (``embedding_provider``; ``auto`` prefers OpenAI when its key is set), so
    every vector in an index shares one model. Generation falls back to the
    other provider when both keys are configured.
    """

    def __init__(
        self,
        together_key: Optional[str] = None,
        openai_key: Optional[str] = None,
        embedding_provider: str = "together",
        together_api_base: str = "https://api.together.xyz/v1",
        openai_api_base: str = "https://api.openai.com/v1",
        together_embedding_model: str = "BAAI/bge-base-en-v1.5",
        openai_embedding_model: str = "text-embedding-3-small",
        embedding_dims: int = 768,
        summary_model: str = "meta-llama/Llama-3.3-70B-Instruct-Turbo",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not together_key and not openai_key:
            raise ValueError(
                "Either TOGETHER_API_KEY or OPENAI_API_KEY environment variable is required."
            )
        self.together_key = together_key
        self.openai_key = openai_key
        self.together_api_base = together_api_base
        self.openai_api_base = openai_api_base
        self.summary_model = summary_model
        self.timeout = timeout
        self._transport = transport

        provider = embedding_provider
        if provider == "auto":
            provider = "openai" if openai_key else "together"
        if provider == "openai" and not openai_key:
            raise ValueError("EMBEDDING_PROVIDER=openai requires OPENAI_API_KEY")
        if provider == "together" and not together_key:
            raise ValueError("EMBEDDING_PROVIDER=together requires TOGETHER_API_KEY")
        if provider not in ("openai", "together"):
            raise ValueError(f"Unknown embedding provider: {embedding_provider}")

        self.provider = provider
        self._model = openai_embedding_model if provider == "openai" else together_embedding_model
        self._dimension = embedding_dims

        self._together_client: Optional[httpx.AsyncClient] = None
        self._openai_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "AIClient":
        return cls(
            together_key=settings.together_api_key,
            openai_key=settings.openai_api_key,
            embedding_provider=settings.embedding_provider,
            together_api_base=settings.together_api_base,
            openai_api_base=settings.openai_api_base,
            together_embedding_model=settings.together_embedding_model,
            openai_embedding_model=settings.openai_embedding_model,
            embedding_dims=settings.embedding_dims,
            summary_model=settings.summary_model,
        )

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    def _make_client(self, base_url: str, key: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _get_together_client(self) -> httpx.AsyncClient:
        if self._together_client is None or self._together_client.is_closed:
            self._together_client = self._make_client(self.together_api_base, self.together_key)
        return self._together_client

    async def _get_openai_client(self) -> httpx.AsyncClient:
        if self._openai_client is None or self._openai_client.is_closed:
            self._openai_client = self._make_client(self.openai_api_base, self.openai_key)
        return self._openai_client

    async def close(self):
        if self._together_client and not self._together_client.is_closed:
            await self._together_client.aclose()
            self._together_client = None
        if self._openai_client and not self._openai_client.is_closed:
            await self._openai_client.aclose()
            self._openai_client = None

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed a batch of texts with the configured provider.

        Raises:
            EmbeddingProviderError: retryable for rate limits, server errors
                and transport failures; non-retryable otherwise.
        """
        result = await self.embed_batch(texts)
        return result.embeddings

    async def embed_batch(self, texts: List[str]) -> EmbeddingResult:
        if not texts:
            return EmbeddingResult(embeddings=[], model=self._model, usage={}, provider=self.provider)

        if self.provider == "openai":
            client = await self._get_openai_client()
            payload = {
                "model": self._model,
                "input": [truncate_for_embedding(t, max_chars=OPENAI_MAX_CHARS) for t in texts],
                "dimensions": self._dimension,
            }
        else:
            client = await self._get_together_client()
            payload = {
                "model": self._model,
                "input": [truncate_for_embedding(t, max_chars=TOGETHER_MAX_CHARS) for t in texts],
            }

        try:
            response = await client.post("/embeddings", json=payload)
        except httpx.HTTPError as e:
            raise EmbeddingProviderError(f"{self.provider} embeddings request failed: {e}", retryable=True)

        if response.status_code != 200:
            retryable = response.status_code in _RETRYABLE_STATUS
            raise EmbeddingProviderError(
                f"{self.provider} embeddings error ({response.status_code}): {response.text[:500]}",
                retryable=retryable,
            )

        data = response.json()
        try:
            sorted_data = sorted(data["data"], key=lambda x: x["index"])
            embeddings = [item["embedding"] for item in sorted_data]
        except (KeyError, TypeError) as e:
            raise EmbeddingProviderError(f"Malformed embeddings response: {e}", retryable=False)

        if len(embeddings) != len(texts):
            raise EmbeddingProviderError(
                f"Provider returned {len(embeddings)} embeddings for {len(texts)} inputs",
                retryable=False,
            )

        return EmbeddingResult(
            embeddings=embeddings,
            model=self._model,
            usage=data.get("usage", {}),
            provider=self.provider,
        )

    async def _generate_with(
        self,
        provider: str,
        messages: List[Dict[str, str]],
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> GenerationResult:
        if provider == "openai":
            client = await self._get_openai_client()
        else:
            client = await self._get_together_client()

        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        try:
            response = await client.post("/chat/completions", json=payload)
        except httpx.HTTPError as e:
            raise WikiGenerationError(f"{provider} generation request failed: {e}")

        if response.status_code != 200:
            logger.error(f"{provider} error ({response.status_code}): {response.text[:500]}")
            raise WikiGenerationError(f"{provider} generation error ({response.status_code}): {response.text[:500]}")

        data = response.json()
        try:
            choice = data["choices"][0]
            text = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise WikiGenerationError(f"Malformed generation response: {e}")

        return GenerationResult(
            text=text,
            model=model,
            usage=data.get("usage", {}),
            finish_reason=choice.get("finish_reason", "unknown"),
            provider=provider,
        )

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 2048,
        temperature: float = 0.1,
        system_prompt: Optional[str] = None,
    ) -> GenerationResult:
        """
        Generate a chat completion.

        Together.ai is tried first when its key is set; OpenAI is the fallback.

        Raises:
            WikiGenerationError: if every configured provider fails.
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        providers = [p for p, key in (("together", self.together_key), ("openai", self.openai_key)) if key]
        last_error: Optional[WikiGenerationError] = None
        for provider in providers:
            # The OpenAI fallback cannot serve Together model names
            provider_model = model or self.summary_model
            if provider == "openai" and "/" in provider_model:
                provider_model = "gpt-4o-mini"
            try:
                return await self._generate_with(provider, messages, provider_model, max_tokens, temperature)
            except WikiGenerationError as e:
                logger.warning(f"Generation with {provider} failed: {e}")
                last_error = e

        raise last_error
