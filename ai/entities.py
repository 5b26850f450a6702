"""
ai/entities.py
--------------
Pure, locale-aware extraction of amounts and categories from classifier
entities and raw message text.

Nothing here raises on bad input: callers get an ExtractionResult whose
`error` says what could not be read.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from config import CURRENCY_EXPONENT
from models.transaction import UNCATEGORIZED, normalize_category

AMOUNT_MISSING = "amount_missing"
AMOUNT_INVALID = "amount_invalid"
CATEGORY_MISSING = "category_missing"

_CURRENCY_TOKENS = re.compile(r"(rp\.?|idr|usd|eur|us\$|\$|€|£)", re.IGNORECASE)

_MULTIPLIERS = {
    "k": 1_000,
    "rb": 1_000,
    "ribu": 1_000,
    "jt": 1_000_000,
    "juta": 1_000_000,
    "m": 1_000_000,
    "mio": 1_000_000,
}

_SUFFIX = re.compile(r"^(?P<number>[\d.,]+)\s*(?P<suffix>[a-z]+)?$")

# Amount-looking tokens inside free text ("beli makan 50.000", "gaji 5jt").
_AMOUNT_IN_TEXT = re.compile(
    r"(?:rp\.?\s*)?\d[\d.,]*\s*(?:ribu|rb|juta|jt|k)?\b", re.IGNORECASE
)

# Everyday words the classifier may return as `item` instead of a category.
CATEGORY_KEYWORDS = {
    "makan": "food",
    "makanan": "food",
    "sarapan": "food",
    "lunch": "food",
    "dinner": "food",
    "kopi": "food",
    "coffee": "food",
    "bensin": "transport",
    "ojek": "transport",
    "grab": "transport",
    "taksi": "transport",
    "taxi": "transport",
    "parkir": "transport",
    "listrik": "bills",
    "pulsa": "bills",
    "internet": "bills",
    "air": "bills",
    "sewa": "rent",
    "kos": "rent",
    "kontrakan": "rent",
    "belanja": "groceries",
    "sayur": "groceries",
    "obat": "health",
    "dokter": "health",
    "gaji": "salary",
    "salary": "salary",
    "bonus": "bonus",
}


@dataclass
class Entities:
    amount: int  # minor units
    category: str
    item: Optional[str] = None


@dataclass
class ExtractionResult:
    entities: Optional[Entities] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _separators(language: str) -> tuple[str, str]:
    """(thousands, decimal) separators for a language."""
    return (".", ",") if language == "id" else (",", ".")


def parse_amount(raw: Optional[str], language: str = "id") -> Optional[int]:
    """
    Read a user-typed amount into integer minor units.

    Strips currency symbols and thousands separators and understands the
    usual shorthand suffixes ("50rb", "2,5jt", "15k").

    Returns:
        The amount, or None when the text is not a positive number.
    """
    if raw is None:
        return None
    text = _CURRENCY_TOKENS.sub("", str(raw).strip().lower()).replace(" ", "")
    text = text.rstrip(".,")
    if not text:
        return None

    match = _SUFFIX.match(text)
    if not match:
        return None
    number, suffix = match.group("number"), match.group("suffix")
    multiplier = 1
    if suffix:
        if suffix not in _MULTIPLIERS:
            return None
        multiplier = _MULTIPLIERS[suffix]

    thousands, decimal = _separators(language)
    if decimal in number and thousands in number:
        number = number.replace(thousands, "").replace(decimal, ".")
    elif thousands in number or number.count(decimal) > 1:
        separator = thousands if thousands in number else decimal
        groups = number.split(separator)
        if groups[0] and all(len(g) == 3 for g in groups[1:]):
            number = "".join(groups)
        elif separator == thousands and len(groups) == 2:
            # "2.5jt" typed with the other locale's decimal point
            number = ".".join(groups)
        else:
            return None
    elif decimal in number:
        number = number.replace(decimal, ".")

    try:
        value = Decimal(number) * multiplier * (Decimal(10) ** CURRENCY_EXPONENT)
    except InvalidOperation:
        return None
    if value <= 0:
        return None
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def find_amount_in_text(text: str, language: str = "id") -> Optional[int]:
    """Scan free text for the first token that parses as an amount."""
    for match in _AMOUNT_IN_TEXT.finditer(text or ""):
        amount = parse_amount(match.group(0), language)
        if amount is not None:
            return amount
    return None


def resolve_category(category: Optional[str], item: Optional[str] = None) -> str:
    """Explicit category first, then a keyword lookup on the item, then 'uncategorized'."""
    if category and category.strip():
        return normalize_category(category)
    if item:
        for word in item.lower().split():
            if word in CATEGORY_KEYWORDS:
                return CATEGORY_KEYWORDS[word]
    return UNCATEGORIZED


def extract_transaction(entities: dict, text: str, language: str = "id") -> ExtractionResult:
    """
    Amount and category for a transaction intent.

    The `amount` entity wins; without one the message text is scanned. An
    amount entity that is present but unreadable fails closed instead of
    falling back to the text.
    """
    item = entities.get("item")
    raw_amount = entities.get("amount")
    if raw_amount not in (None, ""):
        amount = parse_amount(raw_amount, language)
        if amount is None:
            return ExtractionResult(error=AMOUNT_INVALID)
    else:
        amount = find_amount_in_text(text, language)
        if amount is None:
            return ExtractionResult(error=AMOUNT_MISSING)
    return ExtractionResult(entities=Entities(
        amount=amount,
        category=resolve_category(entities.get("category"), item or text),
        item=item,
    ))


def extract_budget_limit(entities: dict, text: str, language: str = "id") -> ExtractionResult:
    """Category and limit for a budget.set intent; both are required."""
    category = entities.get("category") or entities.get("item")
    if not category or not category.strip():
        return ExtractionResult(error=CATEGORY_MISSING)
    result = extract_transaction({"amount": entities.get("amount")}, text, language)
    if not result.ok:
        return result
    return ExtractionResult(entities=Entities(
        amount=result.entities.amount, category=normalize_category(category)
    ))
