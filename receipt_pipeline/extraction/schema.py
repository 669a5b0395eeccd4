"""Receipt data models for structured extraction."""

from datetime import date
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Category = Literal["Meals", "Travel", "Supplies", "Other"]
ConfidenceLevel = Literal["high", "medium", "low"]
SourceStrategy = Literal["vision", "heuristic"]

CATEGORIES: tuple[str, ...] = ("Meals", "Travel", "Supplies", "Other")
CONFIDENCE_LEVELS: tuple[str, ...] = ("high", "medium", "low")


class RawReceiptData(BaseModel):
    """Unvalidated fields as returned by an extraction strategy.

    Every field is optional; the engine fills the gaps before anything
    leaves the extraction stage.
    """

    merchant_name: str | None = Field(None, description="Merchant as printed")
    amount: str | None = Field(None, description="Total paid, possibly with a currency symbol")
    currency: str | None = Field(None, description="Currency code suggested by the extractor")
    receipt_date: str | None = Field(None, description="Transaction date in any format")
    category: str | None = Field(None, description="Meals, Travel, Supplies or Other")
    confidence: str | None = Field(None, description="high, medium or low")
    extraction_notes: str | None = Field(None, description="Free-form remarks")

    @field_validator("merchant_name", "amount", "currency", "receipt_date", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)

    @classmethod
    def from_vision_json(cls, payload: dict[str, Any]) -> "RawReceiptData":
        """Build from a vision response, accepting the short key aliases models emit."""
        return cls(
            merchant_name=payload.get("merchant_name", payload.get("merchant")),
            amount=payload.get("amount", payload.get("total")),
            currency=payload.get("currency"),
            receipt_date=payload.get("receipt_date", payload.get("date")),
            category=payload.get("category"),
            confidence=payload.get("confidence"),
            extraction_notes=payload.get("extraction_notes", payload.get("notes")),
        )


class ExtractionResult(BaseModel):
    """Fully populated, normalized extraction output.

    Attributes:
        merchant_name: Cleaned merchant name (``Unknown Merchant`` if none)
        amount: Total paid, two decimal places
        currency: ISO 4217 code
        receipt_date: Transaction date within the plausible window
        category: Expense category
        confidence_level: Qualitative trust in the extraction
        source_strategy: Strategy that produced the values
        notes: Extraction remarks
    """

    merchant_name: str
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    receipt_date: date
    category: Category = "Other"
    confidence_level: ConfidenceLevel = "low"
    source_strategy: SourceStrategy
    notes: str | None = None
