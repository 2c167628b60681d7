import base64
import logging
from typing import Any, Dict, Optional, Protocol
import httpx
from .settings import STABILITY_API_HOST, STABILITY_API_KEY, STABILITY_ENGINE, EXTERNAL_CALL_TIMEOUT_S

logger = logging.getLogger(__name__)

# Fixed SDXL generation parameters used for every panel
PANEL_PARAMS: Dict[str, Any] = {
    "cfg_scale": 7,
    "height": 1024,
    "width": 1024,
    "samples": 1,
    "steps": 30,
}


class ImageSynthesizer(Protocol):
    async def generate(self, prompt: str, params: Dict[str, Any]) -> bytes: ...


class StabilityImageSynthesizer:
    def __init__(
        self,
        api_key: Optional[str] = None,
        engine: str = STABILITY_ENGINE,
        host: str = STABILITY_API_HOST,
        timeout: float = EXTERNAL_CALL_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else STABILITY_API_KEY
        self.engine = engine
        self.host = host
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise RuntimeError("STABILITY_API_KEY is not set; please configure your .env")
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def generate(self, prompt: str, params: Dict[str, Any]) -> bytes:
        url = f"{self.host}/v1/generation/{self.engine}/text-to-image"
        body = {"text_prompts": [{"text": prompt, "weight": 1}], **params}
        logger.info(f"Requesting image from Stability ({self.engine}) for prompt: {prompt[:100]}...")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(url, headers=self._headers(), json=body)
        if r.status_code >= 400:
            logger.error(f"Stability request failed {r.status_code}: {r.text}")
            raise RuntimeError(f"Stability request failed {r.status_code}: {r.text}")

        artifacts = r.json().get("artifacts") or []
        if not artifacts:
            raise RuntimeError("Stability returned no artifacts")
        artifact = artifacts[0]
        if artifact.get("finishReason") == "CONTENT_FILTERED":
            raise RuntimeError("Stability filtered the generated image")
        data = artifact.get("base64")
        if not data:
            raise RuntimeError("Stability artifact has no image data")
        return base64.b64decode(data)
