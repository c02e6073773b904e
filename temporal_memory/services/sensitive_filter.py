"""
Detection of identifiers that must never be persisted.

Credentials, government IDs and payment numbers are refused outright,
whatever the reasoning service decides.
"""

import re
from typing import Iterable, List, Optional, Pattern, Tuple

PatternSpec = Tuple[Pattern[str], str]

CATEGORY_SSN = 'government_id'
CATEGORY_CARD = 'payment_card'
CATEGORY_IBAN = 'bank_account'
CATEGORY_CREDENTIAL = 'credential'
CATEGORY_API_KEY = 'api_key'

_CARD_CANDIDATE = re.compile(r'\b(?:\d[ -]?){12,18}\d\b')

_PATTERNS: List[PatternSpec] = [
    (re.compile(r'\b(?:ssn|social security(?: number)?)\b\D{0,20}\d{3}[-\s]?\d{2}[-\s]?\d{4}\b', re.I), CATEGORY_SSN),
    (re.compile(r'\b\d{3}-\d{2}-\d{4}\b'), CATEGORY_SSN),
    (re.compile(r'\b[A-Z]{2}\d{2}(?: ?[A-Z0-9]{4}){2,7}(?: ?[A-Z0-9]{1,4})?\b'), CATEGORY_IBAN),
    (re.compile(r'\b(?:password|passwd|passcode|pwd|pin)\b\s*(?:is|was|:|=)\s*\S+', re.I), CATEGORY_CREDENTIAL),
    (re.compile(r'-----BEGIN (?:[A-Z]+ )?PRIVATE KEY-----'), CATEGORY_CREDENTIAL),
    (re.compile(r'\b(?:sk|pk|rk)[-_](?:live|test|proj|ant)?[-_]?[A-Za-z0-9]{16,}\b'), CATEGORY_API_KEY),
    (re.compile(r'\bAKIA[0-9A-Z]{16}\b'), CATEGORY_API_KEY),
    (re.compile(r'\bgh[pousr]_[A-Za-z0-9]{30,}\b'), CATEGORY_API_KEY),
    (re.compile(r'\b(?:api[_ -]?key|secret[_ -]?key|access[_ -]?token|auth[_ -]?token)\b\s*(?:is|:|=)\s*\S{8,}', re.I),
     CATEGORY_API_KEY),
]


def luhn_valid(digits: str) -> bool:
    """Luhn checksum over a string of digits."""
    total = 0
    for index, char in enumerate(reversed(digits)):
        value = int(char)
        if index % 2 == 1:
            value *= 2
            if value > 9:
                value -= 9
        total += value
    return total % 10 == 0


class SensitiveContentFilter:
    """Find forbidden identifiers in candidate memory text."""

    def __init__(self, patterns: Optional[List[PatternSpec]] = None):
        self._patterns = patterns if patterns is not None else _PATTERNS

    def detect(self, text: str) -> Optional[str]:
        """
        Return the category of the first forbidden identifier in text.

        Args:
            text: Text to scan

        Returns:
            Category name, or None if the text is clean
        """
        if not isinstance(text, str) or not text.strip():
            return None

        for pattern, category in self._patterns:
            if pattern.search(text):
                return category

        for match in _CARD_CANDIDATE.finditer(text):
            digits = re.sub(r'\D', '', match.group(0))
            if 13 <= len(digits) <= 19 and luhn_valid(digits):
                return CATEGORY_CARD

        return None

    def detect_any(self, texts: Iterable[Optional[str]]) -> Optional[str]:
        """First category found across several fields."""
        for text in texts:
            category = self.detect(text or '')
            if category:
                return category
        return None
