"""Tests for the embedding client."""

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from product_sense.clients.embeddings import EmbeddingClient
from product_sense.errors import ExtractionError


class MockEmbeddingData:
    """Mock for openai embedding response data item."""

    def __init__(self, embedding: list[float]) -> None:
        self.embedding = embedding


class MockEmbeddingResponse:
    """Mock for openai embedding response."""

    def __init__(self, embeddings: list[list[float]]) -> None:
        self.data = [MockEmbeddingData(e) for e in embeddings]


def _client_with(create: AsyncMock, batch_size: int = 16) -> EmbeddingClient:
    with patch.object(EmbeddingClient, "__init__", lambda self, **kwargs: None):
        client = EmbeddingClient()
    client._batch_size = batch_size
    client._client = MagicMock()
    client._client.embeddings = MagicMock()
    client._client.embeddings.create = create
    return client


class TestEmbeddingClient:
    """Unit tests for EmbeddingClient with mocked OpenAI client."""

    async def test_embed_image_empty(self) -> None:
        client = EmbeddingClient()
        result = await client.embed_image([])
        assert result == []

    async def test_embed_image_bytes_to_base64(self) -> None:
        """Byte images go over the wire as base64 in CLIP's structured format."""
        create = AsyncMock(return_value=MockEmbeddingResponse([[0.2] * 768]))
        client = _client_with(create)

        image_bytes = b"fake image data"
        result = await client.embed_image([image_bytes])

        assert len(result) == 1
        assert len(result[0]) == 768
        input_arg = create.call_args.kwargs["input"]
        assert input_arg == [{"image": base64.b64encode(image_bytes).decode("utf-8")}]

    async def test_embed_image_url_passthrough(self) -> None:
        create = AsyncMock(return_value=MockEmbeddingResponse([[0.2] * 768]))
        client = _client_with(create)

        image_url = "https://example.com/image.jpg"
        await client.embed_image([image_url])

        assert create.call_args.kwargs["input"][0]["image"] == image_url

    async def test_embed_image_batching(self) -> None:
        """Large inputs are split into batches and results keep input order."""
        responses = [
            MockEmbeddingResponse([[0.1], [0.2]]),
            MockEmbeddingResponse([[0.3], [0.4]]),
            MockEmbeddingResponse([[0.5]]),
        ]
        create = AsyncMock(side_effect=responses)
        client = _client_with(create, batch_size=2)

        result = await client.embed_image([bytes([i]) * 4 for i in range(5)])

        assert result == [[0.1], [0.2], [0.3], [0.4], [0.5]]
        assert create.call_count == 3

    async def test_gateway_error_becomes_extraction_error(self) -> None:
        request = httpx.Request("POST", "http://localhost:8000/v1/embeddings")
        create = AsyncMock(side_effect=openai.APIConnectionError(request=request))
        client = _client_with(create)

        with pytest.raises(ExtractionError, match="Image embedding failed"):
            await client.embed_image([b"image"])

    def test_model_name_from_settings(self) -> None:
        assert EmbeddingClient().model_name == "clip-vit"

    def test_to_clip_image_input(self) -> None:
        client = EmbeddingClient()

        result = client._to_clip_image_input([b"test data", "https://example.com/image.png"])

        assert result == [
            {"image": base64.b64encode(b"test data").decode("utf-8")},
            {"image": "https://example.com/image.png"},
        ]

    def test_batches_exact_division(self) -> None:
        client = EmbeddingClient(batch_size=2)

        assert client._batches([1, 2, 3, 4]) == [[1, 2], [3, 4]]

    def test_batches_with_remainder(self) -> None:
        client = EmbeddingClient(batch_size=3)

        assert client._batches([1, 2, 3, 4, 5]) == [[1, 2, 3], [4, 5]]

    def test_batches_single_batch(self) -> None:
        client = EmbeddingClient(batch_size=10)

        assert client._batches([1, 2, 3]) == [[1, 2, 3]]


@pytest.mark.integration
class TestEmbeddingClientIntegration:
    """Integration tests that require a running embedding gateway.

    Run with: pytest -m integration
    Skip with: pytest -m "not integration"
    """

    @pytest.fixture
    def client(self) -> EmbeddingClient:
        return EmbeddingClient()

    async def test_embed_image_real(self, client: EmbeddingClient, png_bytes: bytes) -> None:
        result = await client.embed_image([png_bytes])

        assert len(result) == 1
        assert len(result[0]) == 768  # CLIP dimension
