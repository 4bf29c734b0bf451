"""
OpenRouter API Client for the media pipeline
Used for: image labeling / enrichment (GPT-4o vision with structured outputs)

All calls go through RetryingApiClient so rate limits are honored per call.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ..config import settings
from .errors import ItemFailure
from .http_client import ApiRequest, RetryingApiClient
from .models import ImageContext

logger = logging.getLogger(__name__)

MOODS = ['serene', 'adventurous', 'romantic', 'dramatic', 'intimate', 'luxurious', 'wild', 'peaceful']
TIMES_OF_DAY = ['dawn', 'morning', 'midday', 'afternoon', 'golden-hour', 'dusk', 'night']
SETTINGS = [
    'lodge-interior', 'lodge-exterior', 'pool-deck', 'bedroom', 'dining', 'savanna',
    'river-water', 'forest', 'mountain', 'bush-dinner', 'game-drive', 'walking-safari',
    'aerial', 'spa',
]
COMPOSITIONS = ['hero', 'establishing', 'detail', 'portrait', 'action', 'panoramic']
USAGES = ['hero-banner', 'article-feature', 'gallery', 'thumbnail', 'social', 'print']
QUALITIES = ['high', 'medium', 'low']
IMAGE_TYPES = ['wildlife', 'landscape', 'accommodation', 'activity', 'people', 'food', 'aerial', 'detail']

# JSON Schema for structured outputs - guarantees a parseable response shape
IMAGE_ENRICHMENT_SCHEMA = {
    "type": "object",
    "properties": {
        "scene": {"type": "string"},
        "mood": {"type": "array", "items": {"type": "string", "enum": MOODS}},
        "timeOfDay": {"type": "string", "enum": TIMES_OF_DAY},
        "setting": {"type": "array", "items": {"type": "string", "enum": SETTINGS}},
        "composition": {"type": "string", "enum": COMPOSITIONS},
        "animals": {"type": "array", "items": {"type": "string"}},
        "altText": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
        "suitableFor": {"type": "array", "items": {"type": "string", "enum": USAGES}},
        "quality": {"type": "string", "enum": QUALITIES},
        "imageType": {"type": "string", "enum": IMAGE_TYPES},
    },
    "required": [
        "scene", "mood", "timeOfDay", "setting", "composition", "animals",
        "altText", "tags", "suitableFor", "quality", "imageType",
    ],
    "additionalProperties": False,
}


class OpenRouterClient:
    """Chat completions against OpenRouter"""

    def __init__(self, api: RetryingApiClient, api_key: Optional[str] = None,
                 model: str = settings.OPENROUTER_MODEL,
                 base_url: str = settings.OPENROUTER_BASE_URL):
        self.api_key = api_key or settings.OPENROUTER_API_KEY
        if not self.api_key:
            raise ValueError("OPENROUTER_API_KEY environment variable is required")

        self.api = api
        self.model = model
        self.base_url = base_url.rstrip('/')

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": settings.OPENROUTER_REFERER,
            "X-Title": "Safari Media Pipeline",
        }

    async def complete(self, messages: List[dict], max_tokens: int = 1000,
                       response_format: Optional[dict] = None) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format

        response = await self.api.call(ApiRequest(
            url=f"{self.base_url}/chat/completions",
            json=payload,
            headers=self._headers(),
        ))

        choices = (response.data or {}).get("choices") or []
        if not choices:
            raise ItemFailure("OpenRouter returned no choices")
        return choices[0].get("message", {}).get("content") or ''


def _context_lines(context: ImageContext) -> List[str]:
    lines = []
    if context.property_name:
        lines.append(f"Property: {context.property_name}")
    if context.country:
        lines.append(f"Country: {context.country}")
    if context.segment_type:
        lines.append(f"Segment type: {context.segment_type}")
    if context.segment_title:
        lines.append(f"Segment: {context.segment_title}")
    if context.day_index is not None:
        lines.append(f"Itinerary day: {context.day_index}")
    return lines


class ImageLabeler:
    """Context-aware image enrichment"""

    def __init__(self, client: OpenRouterClient):
        self.client = client

    def build_messages(self, image_base64: str, content_type: str, context: ImageContext) -> List[dict]:
        known = _context_lines(context)
        context_text = "\n".join(known) if known else "No scrape context available."
        return [{
            "role": "user",
            "content": [
                {
                    "type": "text",
                    "text": (
                        "Describe this safari travel image for a media library.\n"
                        f"Known context (ground truth, context v{context.version}):\n{context_text}"
                    ),
                },
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{content_type};base64,{image_base64}"},
                },
            ],
        }]

    async def label(self, image_base64: str, context: ImageContext,
                    content_type: str = 'image/jpeg') -> Dict[str, Any]:
        """
        Label one image.

        Returns:
            The enrichment fields from IMAGE_ENRICHMENT_SCHEMA plus isHero.

        Raises:
            ItemFailure: response was not valid JSON or missed required fields
            RetriesExhaustedError: the API call never succeeded
        """
        text = await self.client.complete(
            self.build_messages(image_base64, content_type, context),
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "image_enrichment", "strict": True, "schema": IMAGE_ENRICHMENT_SCHEMA},
            },
        )
        return parse_enrichment(text)


def parse_enrichment(text: str) -> Dict[str, Any]:
    try:
        enrichment = json.loads(text)
    except json.JSONDecodeError as e:
        raise ItemFailure(f"Unparseable enrichment response: {e}") from e

    if not isinstance(enrichment, dict):
        raise ItemFailure("Enrichment response is not an object")

    missing = [k for k in IMAGE_ENRICHMENT_SCHEMA["required"] if k not in enrichment]
    if missing:
        raise ItemFailure(f"Enrichment response missing fields: {', '.join(missing)}")

    enrichment["isHero"] = enrichment["composition"] == "hero" and enrichment["quality"] == "high"
    return enrichment
