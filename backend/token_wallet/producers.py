"""
Content producers

Thin HTTP clients for the image/video generation APIs. The wallet treats
them as opaque: a producer either returns a content URL or raises.
Retries, if any, belong here and not in the generation gate.
"""

import logging
from typing import Optional, Dict, Any

import httpx

from .config import WalletSettings, get_settings
from .errors import ProducerError
from .models import GenerationRequest

logger = logging.getLogger(__name__)


class HTTPContentProducer:
    """POSTs a prompt to an OpenAI-style generation endpoint and returns the content URL."""

    def __init__(self, kind: str, endpoint: str, api_key: str, model: str = "", timeout: float = 120.0):
        self.kind = kind
        self.endpoint = endpoint
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"prompt": request.prompt, "n": 1}
        if self.model:
            payload["model"] = self.model
        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt
        if request.width and request.height:
            payload["size"] = f"{request.width}x{request.height}"
        if request.style:
            payload["style"] = request.style
        if self.kind == "video" and request.duration:
            payload["duration"] = request.duration
        return payload

    async def generate(self, request: GenerationRequest) -> str:
        if not self.endpoint:
            raise ProducerError(f"No {self.kind} generation endpoint configured")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.endpoint,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json"
                },
                json=self.build_payload(request)
            )

        if response.status_code >= 400:
            logger.error(f"{self.kind} generation failed ({response.status_code}): {response.text[:500]}")
            raise ProducerError(f"{self.kind} generation failed with status {response.status_code}")

        url = self.extract_url(response.json())
        if not url:
            raise ProducerError(f"{self.kind} generation returned no content URL")
        return url

    @staticmethod
    def extract_url(data: Dict[str, Any]) -> Optional[str]:
        items = data.get("data") or []
        if items and isinstance(items[0], dict) and items[0].get("url"):
            return items[0]["url"]
        return data.get("url") or data.get("video_url")


def get_producer(kind: str, settings: Optional[WalletSettings] = None) -> HTTPContentProducer:
    settings = settings or get_settings()
    endpoint = settings.image_producer_url if kind == "image" else settings.video_producer_url
    return HTTPContentProducer(
        kind=kind,
        endpoint=endpoint,
        api_key=settings.producer_api_key,
        model=settings.producer_model,
        timeout=settings.generation_timeout_seconds
    )
