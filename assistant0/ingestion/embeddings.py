from __future__ import annotations

import hashlib
import math
import re
import time
from typing import Protocol

import httpx

from assistant0.core.config import EMBED_DIM, Settings, get_settings
from assistant0.core.errors import RetrievalError
from assistant0.services.resilience import default_retry_policy, retry_async
from assistant0.services.telemetry import record_external_call


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...


def _prepare(text: str) -> str:
    # Stored chunks were embedded with literal "\n" sequences flattened to spaces.
    return text.replace("\\n", " ")


class OpenAIEmbedder:
    """Query embeddings from the OpenAI embeddings API.

    Must use the same model and dimension as the stored chunks, otherwise
    cosine similarity against the knowledge base is meaningless.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, *, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per embedder for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def embed(self, text: str) -> list[float]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise RetrievalError("OPENAI_API_KEY is required for OpenAI embeddings")

        payload = {
            "model": self._settings.embedding_model,
            "input": _prepare(text),
            "dimensions": EMBED_DIM,
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        url = f"{self._settings.openai_api_base.rstrip('/')}/embeddings"
        client = self._get_client()

        start = time.monotonic()

        async def _call() -> httpx.Response:
            return await client.post(url, json=payload, headers=headers)

        try:
            response = await retry_async(_call, policy=default_retry_policy(self._settings))
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration="openai.embeddings",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise RetrievalError("OpenAI embeddings request failed") from exc

        success = response.status_code < 400
        record_external_call(
            integration="openai.embeddings",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if response.status_code in {401, 403}:
            raise RetrievalError("OpenAI embeddings auth error: check OPENAI_API_KEY")
        if not success:
            raise RetrievalError(f"OpenAI embeddings error: {response.status_code}")
        try:
            return [float(value) for value in response.json()["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise RetrievalError("OpenAI embeddings response is malformed") from exc


_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class HashingEmbedder:
    # Offline token-hashing vectors; only comparable with chunks embedded the same way.

    async def embed(self, text: str) -> list[float]:
        vector = [0.0] * EMBED_DIM
        for token in _TOKEN_RE.findall(_prepare(text).lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % EMBED_DIM
            vector[index] += 1.0 if digest[4] % 2 == 0 else -1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]


def get_embedder(settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> Embedder:
    settings = settings or get_settings()
    provider = (settings.embedding_provider or "openai").lower()

    if provider == "openai":
        return OpenAIEmbedder(client, settings=settings)
    if provider == "hashing":
        return HashingEmbedder()

    raise RetrievalError(f"Unsupported embedding provider: {provider}")
