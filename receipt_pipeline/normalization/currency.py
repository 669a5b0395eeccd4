"""Amount and currency normalization."""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DEFAULT_CURRENCY = "USD"

SYMBOL_TO_CODE: dict[str, str] = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
}

CODE_TO_SYMBOL: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "CAD": "C$",
    "AUD": "A$",
    "CHF": "CHF",
    "KRW": "₩",
    "BRL": "R$",
    "RUB": "₽",
    "TRY": "₺",
    "ILS": "₪",
    "PLN": "zł",
    "SEK": "kr",
    "NOK": "kr",
    "DKK": "kr",
    "CZK": "Kč",
    "HUF": "Ft",
    "MXN": "$",
    "ARS": "$",
    "CLP": "$",
    "COP": "$",
    "AED": "د.إ",
    "SAR": "﷼",
    "QAR": "ر.ق",
    "KWD": "د.ك",
    "BHD": ".د.ب",
    "OMR": "﷼",
    "JOD": "د.ا",
    "EGP": "£",
    "MAD": "د.م.",
    "NGN": "₦",
}

SUPPORTED_CURRENCIES = frozenset(CODE_TO_SYMBOL)

# Thousands groups ("1,234.56"), then decimal commas ("12,50"), then plain numbers
_NUMBER = re.compile(r"\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+,\d{1,2}(?!\d)|\d+(?:\.\d+)?")
_DECIMAL_COMMA = re.compile(r"^\d+,\d{1,2}$")
_SYMBOL = re.compile("[" + "".join(SYMBOL_TO_CODE) + "]")

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class NormalizedAmount:
    amount: Decimal
    currency: str

    @property
    def symbol(self) -> str:
        return currency_symbol(self.currency)


def currency_symbol(code: str) -> str:
    """Display symbol for an ISO code, ``$`` when unknown."""
    return CODE_TO_SYMBOL.get(code.upper(), "$")


def normalize_currency_code(code: str | None, default: str = DEFAULT_CURRENCY) -> str:
    """Uppercase and validate an ISO 4217 code against the supported list."""
    if not code:
        return default
    candidate = str(code).strip().upper()
    return candidate if candidate in SUPPORTED_CURRENCIES else default


def parse_amount(raw: object) -> Decimal:
    """Extract the first numeric substring as a two-decimal amount (0.00 if none)."""
    match = _NUMBER.search(str(raw if raw is not None else ""))
    if not match:
        return Decimal("0.00")
    number = match.group(0)
    if _DECIMAL_COMMA.match(number):
        number = number.replace(",", ".")
    try:
        value = Decimal(number.replace(",", ""))
    except InvalidOperation:
        return Decimal("0.00")
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def normalize_currency(raw_amount: object, currency_hint: str | None = None) -> NormalizedAmount:
    """Split a raw amount string into a decimal amount and an ISO currency.

    A currency symbol found in the amount text overrides the hint; without a
    symbol the hint is used, and without a usable hint ``USD``.

    Args:
        raw_amount: Amount as extracted, e.g. ``"$8.45"``, ``"€12,50"`` or ``8.45``
        currency_hint: Currency code suggested by the extractor

    Returns:
        NormalizedAmount with a two-decimal amount
    """
    text = str(raw_amount if raw_amount is not None else "")
    currency = normalize_currency_code(currency_hint)

    symbol = _SYMBOL.search(text)
    if symbol:
        currency = SYMBOL_TO_CODE[symbol.group(0)]

    return NormalizedAmount(amount=parse_amount(text), currency=currency)
