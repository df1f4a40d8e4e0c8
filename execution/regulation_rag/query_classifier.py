"""
Query classification: is a question worth a document search?

A cheap model decides whether a user question concerns the building
regulation documents of the project. Any failure falls back to
"document related" so the caller still runs retrieval.
"""

import re
import json
import logging
from typing import Optional
from dataclasses import dataclass

from .llm import ChatModel, ChatModelConfig
from .language_patterns import CLASSIFIER_SYSTEM_PROMPT, CLASSIFIER_USER_TEMPLATE

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class QueryClassification:
    is_document_related: bool
    confidence: float
    reasoning: str


class QueryClassifier:
    """Classifies queries with a small, deterministic chat model."""

    def __init__(self, chat_model: Optional[ChatModel] = None):
        self.chat_model = chat_model or ChatModel(
            ChatModelConfig(model="gpt-4o-mini", temperature=0.0, timeout=15.0)
        )

    def classify(self, query: str) -> QueryClassification:
        logger.info(f"[Query Classifier] Classifying: '{query[:100]}'")

        try:
            text = self.chat_model.complete(
                CLASSIFIER_SYSTEM_PROMPT,
                CLASSIFIER_USER_TEMPLATE.format(query=query),
            )
        except Exception as e:
            logger.warning(f"[Query Classifier] Classification failed: {e}")
            return QueryClassification(
                True, 0.5, "Classification failed, defaulting to document-related"
            )

        result = self._parse(text)
        logger.info(
            f"[Query Classifier] Result: {'DOCUMENT' if result.is_document_related else 'NON-DOCUMENT'} "
            f"({result.confidence:.2f}) - {result.reasoning}"
        )
        return result

    @staticmethod
    def _parse(text: str) -> QueryClassification:
        # The model may wrap the JSON in a markdown code block
        match = _JSON_OBJECT.search(text or "")
        try:
            if not match:
                raise ValueError("No JSON found in response")
            data = json.loads(match.group(0))
            if not isinstance(data, dict) or not isinstance(data.get("isDocumentRelated"), bool):
                raise ValueError("Missing isDocumentRelated flag")
            confidence = min(1.0, max(0.0, float(data.get("confidence", 0.5))))
            return QueryClassification(
                is_document_related=data["isDocumentRelated"],
                confidence=confidence,
                reasoning=str(data.get("reasoning") or ""),
            )
        except (ValueError, TypeError) as e:
            logger.warning(f"[Query Classifier] Failed to parse classification ({e}): {(text or '')[:200]}")
            return QueryClassification(
                True, 0.5, "Parsing failed, defaulting to document-related for safety"
            )
