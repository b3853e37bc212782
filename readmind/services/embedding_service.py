"""Embedding service for generating vector embeddings"""

import asyncio
import logging
from typing import List, Optional
from functools import lru_cache

from openai import AsyncOpenAI, OpenAIError

from readmind.config import settings
from readmind.errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Service for generating text embeddings using OpenAI or local models"""

    _instance: Optional["EmbeddingService"] = None
    _model = None
    _openai_client = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def is_openai(self) -> bool:
        return settings.embedding_provider == "openai"

    @property
    def dimension(self) -> int:
        return settings.embedding_dimension

    @property
    def openai_client(self) -> AsyncOpenAI:
        if self._openai_client is None and self.is_openai:
            self._openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
            logger.info(f"OpenAI client initialized for model: {settings.embedding_model}")
        return self._openai_client

    @property
    def local_model(self):
        if self._model is None and not self.is_openai:
            from sentence_transformers import SentenceTransformer
            logger.info(f"Loading local embedding model: {settings.embedding_model}")
            self._model = SentenceTransformer(settings.embedding_model)
            logger.info(f"Model loaded. Embedding dimension: {self._model.get_sentence_embedding_dimension()}")
        return self._model

    @staticmethod
    def prepare_text(text: str) -> str:
        """Trim and cut input to the provider limit. Same input, same output."""
        return (text or "").strip()[:settings.embedding_max_chars]

    def _check(self, vector: List[float]) -> List[float]:
        if len(vector) != self.dimension:
            raise EmbeddingUnavailable(
                f"Embedding has dimension {len(vector)}, expected {self.dimension}"
            )
        return [float(v) for v in vector]

    async def _encode_local(self, payload):
        try:
            return await asyncio.to_thread(self.local_model.encode, payload, convert_to_numpy=True)
        except Exception as e:
            logger.warning(f"Local embedding model error: {e}")
            raise EmbeddingUnavailable(str(e)) from e

    async def embed(self, text: str) -> List[float]:
        """Generate embedding for a single text"""
        prepared = self.prepare_text(text)
        if not prepared:
            raise EmbeddingUnavailable("Cannot embed empty text")

        if not self.is_openai:
            embedding = await self._encode_local(prepared)
            return self._check(embedding.tolist())

        try:
            response = await self.openai_client.embeddings.create(
                model=settings.embedding_model,
                input=prepared,
                dimensions=self.dimension,
            )
        except OpenAIError as e:
            logger.warning(f"Embedding provider error: {e}")
            raise EmbeddingUnavailable(str(e)) from e

        return self._check(response.data[0].embedding)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts"""
        if not texts:
            return []

        prepared = [self.prepare_text(t) for t in texts]
        if not all(prepared):
            raise EmbeddingUnavailable("Cannot embed empty text")

        if not self.is_openai:
            embeddings = await self._encode_local(prepared)
            return [self._check(v) for v in embeddings.tolist()]

        try:
            # OpenAI supports batch embedding
            response = await self.openai_client.embeddings.create(
                model=settings.embedding_model,
                input=prepared,
                dimensions=self.dimension,
            )
        except OpenAIError as e:
            logger.warning(f"Embedding provider error on batch of {len(texts)}: {e}")
            raise EmbeddingUnavailable(str(e)) from e

        # Sort by index to maintain order
        sorted_data = sorted(response.data, key=lambda x: x.index)
        return [self._check(item.embedding) for item in sorted_data]


@lru_cache()
def get_embedding_service() -> EmbeddingService:
    """Get the singleton embedding service"""
    return EmbeddingService()
