"""Vision agents using pydantic-ai.

Two agents share one OpenAI-compatible vision model:
- Product reading: brand, model, category, logos, barcode digits, OCR
  text from a single product photo.
- Shelf detection: locate every product instance in a multi-object
  photo and read what is legible for each one.
"""

from __future__ import annotations

import logging
import time

from openai import OpenAIError
from pydantic_ai import Agent, BinaryContent, NativeOutput
from pydantic_ai.exceptions import AgentRunError
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from product_sense.config import settings
from product_sense.errors import ExtractionError
from product_sense.inference.schemas import ProductVisionAnalysis, ShelfDetection
from product_sense.utils.image_format import media_type_for

logger = logging.getLogger(__name__)


PRODUCT_READING_SYSTEM_PROMPT = """\
You read retail product photos for an inventory system.

Report only what is visible. Never guess a barcode: include it only when \
every digit is legible. Use null for anything you cannot read.

- brand_name / model_number: exactly as printed on the package.
- inferred_category: a short lowercase retail category (beverages, snacks, \
dairy, cleaning, personal_care, electronics, ...).
- logos / objects / image_tags: short lowercase phrases.
- inferred_usage_tags: what a shopper uses the product for.
- confidence: how sure you are about brand and model together.
"""


SHELF_DETECTION_SYSTEM_PROMPT = """\
You locate retail products in shelf, cart and counter photos.

List every physical product instance separately: three identical cans are \
three entries. For each one give a tight normalized bounding box (x, y, \
width, height as fractions of the image size, origin top-left) and read \
whatever is legible on it (brand, model, logos, barcode digits). \
confidence is how sure you are that the box contains one product.
"""


def _create_model() -> OpenAIChatModel:
    return OpenAIChatModel(
        settings.model_vision,
        provider=OpenAIProvider(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
        ),
    )


def create_product_reading_agent() -> Agent[None, ProductVisionAnalysis]:
    """Create the single-product reading agent."""
    return Agent(
        _create_model(),
        # NativeOutput uses response_format instead of tool calling; small
        # vision models follow it far more reliably.
        output_type=NativeOutput(ProductVisionAnalysis),
        system_prompt=PRODUCT_READING_SYSTEM_PROMPT,
        retries=settings.vision_retries,
    )


def create_shelf_detection_agent() -> Agent[None, ShelfDetection]:
    """Create the multi-object detection agent."""
    return Agent(
        _create_model(),
        output_type=NativeOutput(ShelfDetection),
        system_prompt=SHELF_DETECTION_SYSTEM_PROMPT,
        retries=settings.vision_retries,
    )


class ProductVisionAnalyzer:
    """High-level interface over the vision agents.

    Usage:
        analyzer = ProductVisionAnalyzer()
        analysis = await analyzer.analyze(image_bytes, "jpeg")
        detection = await analyzer.detect(shelf_bytes, "jpeg")
    """

    def __init__(self) -> None:
        self._reader = create_product_reading_agent()
        self._detector = create_shelf_detection_agent()

    async def analyze(self, image_bytes: bytes, image_format: str | None = None) -> ProductVisionAnalysis:
        """Read one product photo.

        Raises:
            ExtractionError: If the model call fails or returns unusable output.
        """
        start_time = time.time()
        try:
            result = await self._reader.run(
                [
                    "Read this product photo.",
                    BinaryContent(data=image_bytes, media_type=media_type_for(image_format)),
                ]
            )
        except (AgentRunError, OpenAIError) as e:
            msg = f"Vision analysis failed: {e}"
            raise ExtractionError(msg) from e

        analysis = result.output
        logger.debug(
            "[VISION] brand=%s model=%s category=%s (%.0fms)",
            analysis.brand_name,
            analysis.model_number,
            analysis.inferred_category,
            (time.time() - start_time) * 1000,
        )
        return analysis

    async def detect(self, image_bytes: bytes, image_format: str | None = None) -> ShelfDetection:
        """Locate every product instance in a multi-object photo.

        Raises:
            ExtractionError: If the model call fails or returns unusable output.
        """
        start_time = time.time()
        try:
            result = await self._detector.run(
                [
                    "Locate every product in this photo.",
                    BinaryContent(data=image_bytes, media_type=media_type_for(image_format)),
                ]
            )
        except (AgentRunError, OpenAIError) as e:
            msg = f"Product detection failed: {e}"
            raise ExtractionError(msg) from e

        detection = result.output
        logger.info(
            "[VISION] detected %d products (%.0fms)",
            len(detection.products),
            (time.time() - start_time) * 1000,
        )
        return detection
