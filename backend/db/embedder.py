import asyncio
import hashlib
import logging
import math
import os
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import httpx

from .errors import EmbeddingUnavailableError

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 384
DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
HASH_MODEL = "hash-v1"
_DISABLED_BACKENDS = {"none", "off", "disabled", "false", "0"}
_REMOTE_BACKENDS = {"api", "router", "openai"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def _load_sentence_transformer(model_name: str) -> Any:
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name)


@dataclass(frozen=True)
class EmbeddingOutcome:
    """Result of a best-effort embedding attempt.

    ``vector`` is None when nothing was produced; ``error`` then says why.
    Callers that can live without a vector inspect ``ok`` instead of catching.
    """

    vector: Optional[List[float]]
    model: str
    truncated: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.vector is not None


class Embedder:
    """Turns text into 384-dimensional unit vectors.

    Backends:
    - ``local``: sentence-transformers, loaded once on first use behind a lock
    - ``api``: OpenAI-compatible ``/embeddings`` endpoint over httpx
    - ``hash``: deterministic token hashing, no model required
    - ``none``: embeddings disabled
    """

    def __init__(
        self,
        backend: Optional[str] = None,
        model: Optional[str] = None,
        *,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        max_input_chars: Optional[int] = None,
        timeout_sec: Optional[float] = None,
        loader: Optional[Callable[[str], Any]] = None,
    ):
        self.backend = (
            backend or os.getenv("RETRIEVAL_EMBEDDING_BACKEND") or "local"
        ).strip().lower()
        default_model = HASH_MODEL if self.backend == "hash" else DEFAULT_LOCAL_MODEL
        self.model_name = (
            model or os.getenv("RETRIEVAL_EMBEDDING_MODEL") or default_model
        ).strip()
        self.dim = EMBEDDING_DIM
        self.max_input_chars = max(
            1,
            max_input_chars
            if max_input_chars is not None
            else _env_int("RETRIEVAL_EMBEDDING_MAX_CHARS", 2000),
        )
        self._api_base = (
            api_base
            if api_base is not None
            else _first_env(
                [
                    "RETRIEVAL_EMBEDDING_API_BASE",
                    "ROUTER_API_BASE",
                    "OPENAI_BASE_URL",
                ]
            )
        ).strip().rstrip("/")
        if self._api_base.lower().endswith("/embeddings"):
            self._api_base = self._api_base[: -len("/embeddings")]
        self._api_key = (
            api_key
            if api_key is not None
            else _first_env(
                [
                    "RETRIEVAL_EMBEDDING_API_KEY",
                    "ROUTER_API_KEY",
                    "OPENAI_API_KEY",
                ]
            )
        )
        self._timeout_sec = max(
            0.5,
            timeout_sec
            if timeout_sec is not None
            else _env_float("RETRIEVAL_REMOTE_TIMEOUT_SEC", 8.0),
        )
        self._loader = loader or _load_sentence_transformer
        self._model: Any = None
        self._model_lock = threading.Lock()
        self._load_error: Optional[str] = None
        self.load_count = 0

    @property
    def available(self) -> bool:
        return self.backend not in _DISABLED_BACKENDS and self._load_error is None

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def status(self) -> dict:
        return {
            "backend": self.backend,
            "model": self.model_name,
            "dim": self.dim,
            "available": self.available,
            "loaded": self.is_loaded,
            "load_error": self._load_error,
            "max_input_chars": self.max_input_chars,
        }

    def prepare(self, text: str) -> Tuple[str, bool]:
        """Collapse whitespace and keep the prefix that fits the input window."""
        normalized = re.sub(r"\s+", " ", (text or "").strip())
        if len(normalized) > self.max_input_chars:
            return normalized[: self.max_input_chars], True
        return normalized, False

    def _ensure_model(self) -> Any:
        if self._model is not None:
            return self._model
        with self._model_lock:
            if self._model is None:
                try:
                    model = self._loader(self.model_name)
                except Exception as exc:
                    self._load_error = f"{type(exc).__name__}: {exc}"
                    raise EmbeddingUnavailableError(
                        f"model '{self.model_name}' failed to load"
                    ) from exc
                self.load_count += 1
                self._model = model
                self._load_error = None
                logger.info("Loaded embedding model %s", self.model_name)
        return self._model

    def _encode_local(self, texts: List[str]) -> List[List[float]]:
        model = self._ensure_model()
        encoded = model.encode(texts, normalize_embeddings=True)
        return [[float(v) for v in row] for row in encoded]

    def _hash_embedding(self, content: str) -> List[float]:
        vector = [0.0] * self.dim

        normalized = content.lower()
        tokens = re.findall(r"[a-z0-9_]+", normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for i in range(0, 8, 2):
                idx = digest[i] % self.dim
                sign = -1.0 if (digest[i + 1] & 1) else 1.0
                weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
                vector[idx] += sign * weight
        return vector

    @staticmethod
    def _extract_embeddings(payload: Any) -> Optional[List[List[float]]]:
        data = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(data, list):
            return None
        rows: List[Any] = []
        for item in sorted(
            data,
            key=lambda entry: entry.get("index", 0) if isinstance(entry, dict) else 0,
        ):
            rows.append(item.get("embedding") if isinstance(item, dict) else item)
        try:
            return [[float(v) for v in row] for row in rows]
        except (TypeError, ValueError):
            return None

    async def _fetch_remote(self, texts: List[str]) -> List[List[float]]:
        if not self._api_base:
            raise EmbeddingUnavailableError("embedding api base is not configured")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            timeout = httpx.Timeout(self._timeout_sec)
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    f"{self._api_base}/embeddings",
                    json={"model": self.model_name, "input": texts},
                    headers=headers,
                )
                response.raise_for_status()
                parsed = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EmbeddingUnavailableError(f"embedding request failed: {exc}") from exc

        vectors = self._extract_embeddings(parsed)
        if vectors is None or len(vectors) != len(texts):
            raise EmbeddingUnavailableError("embedding response was malformed")
        return vectors

    def _finalize(self, vector: List[float]) -> List[float]:
        if len(vector) != self.dim:
            raise EmbeddingUnavailableError(
                f"model returned {len(vector)} dimensions, expected {self.dim}"
            )
        norm = math.sqrt(sum(v * v for v in vector))
        if norm <= 0 or math.isnan(norm):
            raise EmbeddingUnavailableError("model returned a zero vector")
        return [v / norm for v in vector]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        if self.backend in _DISABLED_BACKENDS:
            raise EmbeddingUnavailableError("embedding backend is disabled")

        prepared = [self.prepare(text)[0] for text in texts]
        if any(not item for item in prepared):
            raise EmbeddingUnavailableError("cannot embed empty text")

        if self.backend == "hash":
            raw = [self._hash_embedding(item) for item in prepared]
        elif self.backend in _REMOTE_BACKENDS:
            raw = await self._fetch_remote(prepared)
        elif self.backend == "local":
            try:
                raw = await asyncio.to_thread(self._encode_local, prepared)
            except EmbeddingUnavailableError:
                raise
            except Exception as exc:
                raise EmbeddingUnavailableError(f"inference failed: {exc}") from exc
        else:
            raise EmbeddingUnavailableError(
                f"unsupported embedding backend '{self.backend}'"
            )
        return [self._finalize(vector) for vector in raw]

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def try_embed(self, text: str) -> EmbeddingOutcome:
        """Embed without raising; failures come back on the outcome."""
        _, truncated = self.prepare(text)
        try:
            vector = await self.embed(text)
        except EmbeddingUnavailableError as exc:
            logger.warning("Embedding skipped: %s", exc.reason)
            return EmbeddingOutcome(
                vector=None,
                model=self.model_name,
                truncated=truncated,
                error=exc.reason,
            )
        if truncated:
            logger.debug(
                "Embedding input truncated to %d characters", self.max_input_chars
            )
        return EmbeddingOutcome(vector=vector, model=self.model_name, truncated=truncated)
