"""
Cross-reference detection.

The hop control flow in ``multi_hop`` only talks to ``ReferenceDetector``;
the Dutch Bouwbesluit citation grammar lives in
``DutchLegalReferenceDetector`` and can be swapped for other corpora.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .language_patterns import (
    ARTICLE_REFERENCE_PATTERN,
    TABLE_REFERENCE_PATTERN,
    REFERENCE_LABELS,
)

TABLE = "table"
ARTICLE = "article"


@dataclass(frozen=True)
class Reference:
    """A cross-reference such as ``Tabel 4.162``."""
    kind: str
    number: str

    @property
    def label(self) -> str:
        return f"{REFERENCE_LABELS.get(self.kind, self.kind.title())} {self.number}"

    def __str__(self) -> str:
        return self.label


class ReferenceDetector(ABC):
    """Finds cross-references in chunk text."""

    @abstractmethod
    def detect_references(self, text: str) -> list[Reference]:
        """Return references in order of first appearance, without duplicates."""

    def query_for(self, reference: Reference) -> str:
        """Retrieval query used to resolve a reference."""
        return reference.label

    def mention_pattern(self, reference: Reference) -> re.Pattern:
        """Pattern matching a mention of ``reference`` in arbitrary text."""
        return re.compile(rf"\b{re.escape(reference.label)}\b", re.IGNORECASE)


class DutchLegalReferenceDetector(ReferenceDetector):
    """Article and table references in Bouwbesluit style, e.g. ``artikel 4.164``."""

    patterns = (
        (TABLE, TABLE_REFERENCE_PATTERN),
        (ARTICLE, ARTICLE_REFERENCE_PATTERN),
    )

    def detect_references(self, text: str) -> list[Reference]:
        found = []
        for kind, pattern in self.patterns:
            for match in pattern.finditer(text or ""):
                ref = Reference(kind, match.group(1))
                if ref not in found:
                    found.append(ref)
        return found

    def mention_pattern(self, reference: Reference) -> re.Pattern:
        if reference.kind == ARTICLE:
            return re.compile(rf"\b(?:artikel|art\.)\s+{re.escape(reference.number)}\b", re.IGNORECASE)
        return re.compile(rf"\btabel\s+{re.escape(reference.number)}\b", re.IGNORECASE)
