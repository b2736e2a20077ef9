"""Tests for embedding providers and cosine similarity."""

import math
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from openai import APIConnectionError, RateLimitError

from kisanmitra.errors import ProviderError, ValidationError
from kisanmitra.knowledge.embeddings import (
    HashEmbeddingProvider,
    OpenAIEmbeddingProvider,
    cosine_similarity,
)


class TestCosineSimilarity:
    """Tests for cosine_similarity."""

    def test_identical_vectors(self):
        """A non-zero vector is maximally similar to itself."""
        v = [0.3, -1.2, 4.5]
        assert abs(cosine_similarity(v, v) - 1.0) < 1e-9

    def test_orthogonal_vectors(self):
        """Orthogonal vectors score 0."""
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_opposite_vectors(self):
        """Opposite vectors score -1."""
        assert abs(cosine_similarity([1.0, 2.0], [-1.0, -2.0]) + 1.0) < 1e-9

    def test_zero_vector(self):
        """Either vector with zero norm scores 0."""
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([1.0, 1.0], [0.0, 0.0]) == 0.0

    def test_bounded(self):
        """Similarity stays within [-1, 1]."""
        v = [1e-8, 3e-8, 7e-8]
        sim = cosine_similarity(v, [x * 1e10 for x in v])
        assert -1.0 <= sim <= 1.0

    def test_dimension_mismatch(self):
        """Different lengths are a validation error."""
        with pytest.raises(ValidationError):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])


class TestHashEmbeddingProvider:
    """Tests for the deterministic hashing provider."""

    @pytest.mark.asyncio
    async def test_deterministic(self):
        """Same text gives the same vector."""
        provider = HashEmbeddingProvider(dimensions=64)
        a = await provider.embed("wheat needs loamy soil")
        b = await provider.embed("wheat needs loamy soil")
        assert a == b
        assert len(a) == 64

    @pytest.mark.asyncio
    async def test_normalised(self):
        """Non-empty text gives a unit vector."""
        provider = HashEmbeddingProvider(dimensions=64)
        v = await provider.embed("rice paddy kharif")
        assert abs(math.sqrt(sum(x * x for x in v)) - 1.0) < 1e-9

    @pytest.mark.asyncio
    async def test_empty_text(self):
        """Text without tokens gives a zero vector."""
        provider = HashEmbeddingProvider(dimensions=16)
        assert await provider.embed("  ...  ") == [0.0] * 16

    @pytest.mark.asyncio
    async def test_non_ascii_text(self):
        """Devanagari text embeds to a unit vector and matches shared words."""
        provider = HashEmbeddingProvider(dimensions=256)
        query = await provider.embed("गेहूं की खेती")
        related = await provider.embed("गेहूं की बुवाई")
        unrelated = await provider.embed("drip irrigation")
        assert abs(math.sqrt(sum(x * x for x in query)) - 1.0) < 1e-9
        assert cosine_similarity(query, related) > cosine_similarity(query, unrelated)

    @pytest.mark.asyncio
    async def test_shared_words_are_similar(self):
        """Overlapping texts are closer than unrelated ones."""
        provider = HashEmbeddingProvider(dimensions=256)
        query = await provider.embed("cultivation practices for wheat")
        related = await provider.embed("wheat cultivation practices in rabi")
        unrelated = await provider.embed("drip irrigation saves water")
        assert cosine_similarity(query, related) > cosine_similarity(query, unrelated)

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self):
        """embed_batch returns one vector per text in order."""
        provider = HashEmbeddingProvider(dimensions=32)
        texts = ["rice", "wheat", "maize"]
        batch = await provider.embed_batch(texts)
        assert batch == [await provider.embed(t) for t in texts]

    def test_invalid_dimensions(self):
        """Dimensions must be positive."""
        with pytest.raises(ValidationError):
            HashEmbeddingProvider(dimensions=0)


class TestOpenAIEmbeddingProvider:
    """Tests for OpenAIEmbeddingProvider."""

    @pytest.fixture
    def mock_client(self):
        with patch("kisanmitra.knowledge.embeddings.AsyncOpenAI") as MockClient:
            mock_instance = MockClient.return_value
            mock_instance.embeddings.create = AsyncMock()
            yield mock_instance

    @pytest.fixture
    def mock_cache(self):
        cache = MagicMock()
        cache.get_embedding = AsyncMock(return_value=None)
        cache.set_embedding = AsyncMock()
        return cache

    @pytest.mark.asyncio
    async def test_embed_single(self, mock_client):
        """Test generating a single embedding."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=2)

        mock_response = MagicMock()
        mock_response.data = [MagicMock(embedding=[0.1, 0.2])]
        mock_client.embeddings.create.return_value = mock_response

        emb = await provider.embed("test text")

        assert emb == [0.1, 0.2]
        mock_client.embeddings.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_embed_empty(self, mock_client):
        """Empty text returns a zero vector without calling the API."""
        provider = OpenAIEmbeddingProvider(api_key="test")
        emb = await provider.embed("")
        assert len(emb) == 1536
        assert all(x == 0.0 for x in emb)
        mock_client.embeddings.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_embed_batch(self, mock_client):
        """Test generating batch embeddings."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=1, batch_size=2)

        mock_resp1 = MagicMock()
        mock_resp1.data = [MagicMock(embedding=[0.1]), MagicMock(embedding=[0.2])]
        mock_resp2 = MagicMock()
        mock_resp2.data = [MagicMock(embedding=[0.3])]
        mock_client.embeddings.create.side_effect = [mock_resp1, mock_resp2]

        embeddings = await provider.embed_batch(["text1", "text2", "text3"])

        assert embeddings == [[0.1], [0.2], [0.3]]
        assert mock_client.embeddings.create.call_count == 2

    @pytest.mark.asyncio
    async def test_cache_hit(self, mock_client, mock_cache):
        """Cached vectors skip the API."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=2, cache=mock_cache)
        mock_cache.get_embedding.return_value = [0.9, 0.9]

        emb = await provider.embed("cached text")

        assert emb == [0.9, 0.9]
        mock_client.embeddings.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_cache_miss_stores(self, mock_client, mock_cache):
        """A fresh embedding is written to the cache."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=2, cache=mock_cache)

        mock_response = MagicMock()
        mock_response.data = [MagicMock(embedding=[0.5, 0.5])]
        mock_client.embeddings.create.return_value = mock_response

        emb = await provider.embed("new text")

        assert emb == [0.5, 0.5]
        mock_cache.set_embedding.assert_called_once_with(
            "text-embedding-3-small", "new text", [0.5, 0.5]
        )

    @pytest.mark.asyncio
    async def test_cache_failure_is_not_fatal(self, mock_client, mock_cache):
        """A broken cache only costs an API call."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=2, cache=mock_cache)
        mock_cache.get_embedding.side_effect = ProviderError("Redis not connected")
        mock_cache.set_embedding.side_effect = ProviderError("Redis not connected")

        mock_response = MagicMock()
        mock_response.data = [MagicMock(embedding=[0.5, 0.5])]
        mock_client.embeddings.create.return_value = mock_response

        assert await provider.embed("text") == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_retry_logic(self, mock_client):
        """Rate limits are retried with backoff."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=1)

        mock_response = MagicMock()
        mock_response.data = [MagicMock(embedding=[0.1])]
        mock_client.embeddings.create.side_effect = [
            RateLimitError(message="Rate limit", response=MagicMock(), body={}),
            RateLimitError(message="Rate limit", response=MagicMock(), body={}),
            mock_response,
        ]

        with patch("asyncio.sleep", new_callable=AsyncMock):
            emb = await provider.embed("text")

        assert emb == [0.1]
        assert mock_client.embeddings.create.call_count == 3

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, mock_client):
        """Persistent rate limits become a ProviderError."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=1, max_retries=2)
        mock_client.embeddings.create.side_effect = RateLimitError(
            message="Rate limit", response=MagicMock(), body={}
        )

        with patch("asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ProviderError):
                await provider.embed("text")

        assert mock_client.embeddings.create.call_count == 2

    @pytest.mark.asyncio
    async def test_api_error_translated(self, mock_client):
        """Other SDK errors become a ProviderError without retry."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=1)
        mock_client.embeddings.create.side_effect = APIConnectionError(request=MagicMock())

        with pytest.raises(ProviderError):
            await provider.embed("text")

        mock_client.embeddings.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_wrong_dimension(self, mock_client):
        """A vector of the wrong length is rejected."""
        provider = OpenAIEmbeddingProvider(api_key="test", dimensions=3)

        mock_response = MagicMock()
        mock_response.data = [MagicMock(embedding=[0.1, 0.2])]
        mock_client.embeddings.create.return_value = mock_response

        with pytest.raises(ProviderError):
            await provider.embed("text")
