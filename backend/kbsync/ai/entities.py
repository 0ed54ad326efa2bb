"""
Entity Recognition — External NLP Collaborator
================================================
``EntityRecognizer`` detects named PII entities in text. The Azure AI
Language implementation calls the ``PiiEntityRecognition`` task of the
analyze-text REST API over httpx.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
import structlog

from kbsync.models import PIIEntity

logger = structlog.get_logger()

ANALYZE_TEXT_API_VERSION = "2023-04-01"


class EntityRecognizer(ABC):
    @abstractmethod
    async def detect_entities(
        self,
        text: str,
        categories: List[str],
        language: str = "en",
    ) -> List[PIIEntity]:
        ...


class AzureLanguageRecognizer(EntityRecognizer):
    """PII entity recognition via Azure AI Language."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def detect_entities(
        self,
        text: str,
        categories: List[str],
        language: str = "en",
    ) -> List[PIIEntity]:
        payload = {
            "kind": "PiiEntityRecognition",
            "parameters": {"modelVersion": "latest", "piiCategories": categories},
            "analysisInput": {
                "documents": [{"id": "1", "language": language, "text": text}]
            },
        }
        url = f"{self.endpoint}/language/:analyze-text"
        headers = {"Ocp-Apim-Subscription-Key": self.api_key}
        params = {"api-version": ANALYZE_TEXT_API_VERSION}

        if self._client is not None:
            resp = await self._client.post(url, json=payload, headers=headers, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.post(url, json=payload, headers=headers, params=params)
        resp.raise_for_status()

        documents = resp.json().get("results", {}).get("documents", [])
        if not documents:
            errors = resp.json().get("results", {}).get("errors", [])
            raise ValueError(f"Entity recognition returned no documents: {errors}")

        entities = []
        for raw in documents[0].get("entities", []):
            entities.append(
                PIIEntity(
                    text=raw["text"],
                    category=raw["category"],
                    confidence=float(raw["confidenceScore"]),
                    offset=int(raw["offset"]),
                    length=int(raw["length"]),
                )
            )
        return entities


def build_recognizer(settings) -> Optional[EntityRecognizer]:
    if not settings.azure_language_endpoint or not settings.azure_language_api_key:
        logger.warning("Azure AI Language not configured, PII redaction uses regex patterns")
        return None
    return AzureLanguageRecognizer(
        endpoint=settings.azure_language_endpoint,
        api_key=settings.azure_language_api_key,
        timeout_seconds=settings.ai_timeout_seconds,
    )
