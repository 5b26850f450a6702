"""
ai/gemini_classifier.py
-----------------------
Uses Google Gemini to classify chat messages into financial intents.

Responsibilities:
    - Understand Indonesian (formal & colloquial) and English messages.
    - Return one intent label, a confidence score and the raw entities
      (amount, category, item) for the dispatcher.
    - Never raise: API and parsing failures come back as a Classification
      with `error` set and no intent.
"""

import json
from typing import Optional, Sequence

import google.generativeai as genai

from ai.intents import KNOWN_INTENTS, Classification
from config import GEMINI_API_KEY, GEMINI_MODEL
from models.session import CustomPhrase
from utils.logger import get_logger

logger = get_logger(__name__)

# ── System prompt for the AI ─────────────────────────────

_SYSTEM_PROMPT = """You are the message classifier of a personal finance chat bot.
Classify the user's message into exactly one intent and extract entities.
The user writes in language "{locale}" (id = Indonesian, en = English).

## Intents
- transaction.income   → money received: "terima gaji 5jt", "dapat uang 200rb", "masuk 1.000.000"
- transaction.expense  → money spent: "bayar listrik 350rb", "beli makan 50000", "keluar 20k"
- budget.set           → set a category limit: "atur budget makan 2jt", "set budget transport 500k"
- budget.view          → show budgets: "lihat budget", "show my budget"
- budget.remaining     → what is left: "sisa budget", "how much budget is left"
- report.daily         → today's report: "laporan harian", "daily report"
- report.weekly        → this week's report: "laporan mingguan", "weekly report"
- report.monthly       → this month's report: "laporan bulanan", "monthly report"
{custom_examples}
## Entities (strings, omit when absent)
- amount: the number exactly as the user wrote it, e.g. "50.000", "2,5jt", "15k"
- category: a short lower-case English category such as food, transport, bills,
  rent, groceries, health, salary, shopping, entertainment
- item: what was bought or received, in the user's words

## Format
Return JSON only, no markdown, no explanation:
{{"intent": "<intent or null>", "confidence": <0..1>, "entities": {{"amount": "...", "category": "...", "item": "..."}}}}

If the message is not about finances: {{"intent": null, "confidence": 0, "entities": {{}}}}
"""


def _custom_examples(custom_phrases: Sequence[CustomPhrase]) -> str:
    if not custom_phrases:
        return ""
    lines = ["", "## User-defined phrases (these take priority)"]
    for p in custom_phrases:
        examples = ", ".join(f'"{e}"' for e in p.examples)
        lines.append(f'- "{p.phrase}" → {p.intent}' + (f" (e.g. {examples})" if examples else ""))
    return "\n".join(lines) + "\n"


def _strip_fences(raw: str) -> str:
    """Clean markdown code fences if present."""
    raw = raw.strip()
    if raw.startswith("```"):
        raw = raw.split("\n", 1)[1] if "\n" in raw else raw[3:]
    if raw.endswith("```"):
        raw = raw[:-3]
    return raw.strip()


def parse_response(raw: str) -> Classification:
    """
    Turn the model's JSON text into a Classification.

    Unknown intents are reported as no intent; entity values are coerced to
    strings so the amount parser sees exactly what the model read.
    """
    data = json.loads(_strip_fences(raw))
    intent = data.get("intent")
    if intent not in KNOWN_INTENTS:
        intent = None
    try:
        confidence = float(data.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    entities = {
        k: str(v) for k, v in (data.get("entities") or {}).items() if v not in (None, "")
    }
    return Classification(
        intent=intent,
        confidence=max(0.0, min(1.0, confidence)),
        entities=entities,
    )


class GeminiIntentClassifier:
    """IntentClassifier backed by a Gemini generative model."""

    def __init__(self, api_key: str = GEMINI_API_KEY, model_name: str = GEMINI_MODEL,
                 model: Optional[object] = None):
        if model is None:
            genai.configure(api_key=api_key)
            model = genai.GenerativeModel(model_name)
        self._model = model

    def classify(
        self, locale: str, text: str, custom_phrases: Sequence[CustomPhrase] = ()
    ) -> Classification:
        """
        Classify one chat message.

        Args:
            locale: Session language ('id' or 'en').
            text: The raw message.
            custom_phrases: The session's user-defined phrase → intent mappings.
        """
        prompt = _SYSTEM_PROMPT.format(
            locale=locale, custom_examples=_custom_examples(custom_phrases)
        )
        raw = ""
        try:
            response = self._model.generate_content(
                [
                    {"role": "user", "parts": [{"text": prompt}]},
                    {"role": "user", "parts": [{"text": text}]},
                ],
                generation_config=genai.GenerationConfig(
                    temperature=0.1,
                    max_output_tokens=200,
                ),
            )
            raw = response.text
            result = parse_response(raw)
            logger.info(f"Gemini classified: {result.intent} ({result.confidence:.2f})")
            return result

        except json.JSONDecodeError:
            logger.warning(f"Gemini returned non-JSON: {raw!r}")
            return Classification(intent=None, error="parse_failed")
        except Exception as e:
            logger.error(f"Gemini API error: {e}")
            return Classification(intent=None, error="api_error")
