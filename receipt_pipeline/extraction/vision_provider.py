"""OpenAI vision provider for receipt field extraction.

Sends the receipt image to a vision-capable chat model and asks for a
single JSON object. Transient API errors are retried with exponential
backoff; every other failure is reported as an unsuccessful result so the
engine can fall back to heuristics.
"""

import json
import logging
import os
from datetime import date
from typing import Any

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from receipt_pipeline.extraction.base import ExtractionProvider, ProviderResult
from receipt_pipeline.extraction.documents import DocumentFetcher
from receipt_pipeline.extraction.schema import RawReceiptData
from receipt_pipeline.shared.config import Settings
from receipt_pipeline.shared.errors import DocumentFetchError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You extract expense data from photographed or scanned receipts, \
invoices and payment confirmations.

Return ONLY one JSON object, no markdown, no prose:
{
  "merchant_name": "business that received the payment",
  "amount": 0.00,
  "currency": "ISO 4217 code, e.g. USD, EUR, GBP, JPY, INR, CAD, AUD, CHF",
  "receipt_date": "YYYY-MM-DD",
  "category": "Meals|Travel|Supplies|Other",
  "confidence": "high|medium|low",
  "extraction_notes": "short note on any ambiguity or inference"
}

Rules:
- merchant_name: the brand as printed, without store numbers, addresses, phone numbers or legal suffixes.
- amount: the FINAL amount paid including taxes, fees and tip; never a subtotal or a base fare. Numeric only.
- currency: from the symbol or code next to the total ($ USD, € EUR, £ GBP, ¥ JPY, ₹ INR); \
USD only when nothing indicates otherwise, and say so in extraction_notes.
- receipt_date: the purchase or booking date, not a flight, print or screenshot date. \
Two-digit years: 00-49 are 20xx, 50-99 are 19xx.
- category: Meals (restaurants, cafes, groceries, food delivery), Travel (airlines, \
ride-sharing, taxis, hotels, fuel, parking, car rental), Supplies (office supplies, \
electronics, software, online retail), Other (anything else).
- confidence: high when merchant, total and date are all printed clearly; medium when \
something had to be inferred or calculated; low when the image is poor or values are guessed."""


class OpenAIVisionProvider(ExtractionProvider):
    """Vision extraction provider backed by the OpenAI chat completions API.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings, fetcher: DocumentFetcher | None = None) -> None:
        """Initialize OpenAI vision provider.

        Args:
            settings: Application settings
            fetcher: Document fetcher (shared cache); created from settings if omitted
        """
        super().__init__(settings)
        self.fetcher = fetcher or DocumentFetcher(settings)
        self._client: AsyncOpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured."""
        return os.getenv("OPENAI_API_KEY") is not None

    async def extract(self, file_url: str, filename: str) -> ProviderResult:
        """Extract receipt fields from the image at ``file_url``.

        Args:
            file_url: Location of the receipt image
            filename: Original filename, passed to the model as a hint

        Returns:
            ProviderResult with raw fields or error, provider='openai'
        """
        if not self.is_available():
            return self._failure("OPENAI_API_KEY environment variable not set")

        try:
            image_data_url = await self.fetcher.fetch_data_url(file_url)
        except DocumentFetchError as e:
            return self._failure(str(e))

        try:
            api_key = os.getenv("OPENAI_API_KEY")
            if self._client is None or self._client.api_key != api_key:
                self._client = AsyncOpenAI(api_key=api_key)

            response = await self._call_openai_with_retry(image_data_url, filename)

            content = response.choices[0].message.content
            if not content:
                return self._failure("No content in API response")

            payload = self._parse_json_response(content)
            return ProviderResult(
                data=RawReceiptData.from_vision_json(payload),
                success=True,
                provider=self.provider_name,
            )

        except Exception as e:
            logger.warning(f"Vision extraction failed for {filename or file_url}: {e}")
            return self._failure(f"Extraction failed: {str(e)}")

    def _failure(self, error: str) -> ProviderResult:
        return ProviderResult(data=None, success=False, error=error, provider=self.provider_name)

    @retry(
        retry=retry_if_exception_type((APIConnectionError, APITimeoutError, RateLimitError)),
        wait=wait_exponential_jitter(initial=1, max=8),
        stop=stop_after_attempt(2),
        reraise=True,
    )
    async def _call_openai_with_retry(self, image_data_url: str, filename: str) -> Any:
        """Call the chat completions API, retrying connection and rate-limit errors.

        The engine's wall-clock race bounds the total time spent here,
        retries included.
        """
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        return await self._client.chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self._build_user_prompt(filename)},
                        {
                            "type": "image_url",
                            "image_url": {"url": image_data_url, "detail": "high"},
                        },
                    ],
                },
            ],
            max_tokens=self.settings.openai_max_tokens,
            temperature=0,
            response_format={"type": "json_object"},
        )

    def _build_user_prompt(self, filename: str) -> str:
        return (
            f"Extract data from this {filename or 'receipt'}.\n"
            f"Today: {date.today().isoformat()}\n"
            "Return only JSON."
        )

    def _parse_json_response(self, content: str) -> dict[str, Any]:
        """Parse the model's JSON object.

        Raises:
            ValueError: If the response is not a JSON object
        """
        payload = json.loads(content)
        if not isinstance(payload, dict):
            raise ValueError("Vision response is not a JSON object")
        return payload
