"""Image generation provider.

Generates images from text prompts through a HuggingFace inference
endpoint and returns them inline as base64 image content.
"""

import base64
from typing import TYPE_CHECKING, Any, Optional

import httpx

from shared.config import ImageGenSettings
from shared.logging import get_logger
from shared.models import InvocationContext, ProviderDescriptor, ToolResult
from providers.base import OperationHandler, RESTOperationSet
from providers.http import RateLimited, UpstreamError, parse_retry_after, retry_on_rate_limit

if TYPE_CHECKING:
    from hub.core import Hub

logger = get_logger(__name__)


class ImageGenOperations(RESTOperationSet):
    """Image generation operations of one session."""

    provider = "image-gen"

    def __init__(
        self,
        settings: ImageGenSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.settings = settings
        self.timeout = settings.timeout_seconds
        super().__init__(transport=transport)

    def _define_operations(self) -> None:
        self._add(
            "generate-image",
            "Generate an image from a text prompt using AI (FLUX / HuggingFace). "
            "Returns the image for inline display.",
            [
                {"name": "prompt", "type": "string",
                 "description": "Text description of the image to generate"},
                {"name": "width", "type": "integer", "minimum": 256, "maximum": 2048,
                 "description": f"Image width in pixels (default {self.settings.default_width})",
                 "required": False},
                {"name": "height", "type": "integer", "minimum": 256, "maximum": 2048,
                 "description": f"Image height in pixels (default {self.settings.default_height})",
                 "required": False},
                {"name": "num_inference_steps", "type": "integer", "minimum": 1, "maximum": 50,
                 "description": "Number of inference steps (higher = better quality, slower)",
                 "required": False},
                {"name": "seed", "type": "integer",
                 "description": "Random seed for reproducible results", "required": False},
            ],
        )

    def _handlers(self) -> dict[str, OperationHandler]:
        return {"generate-image": self._generate_image}

    async def _generate_image(self, arguments: dict[str, Any], context: InvocationContext) -> ToolResult:
        parameters: dict[str, Any] = {
            "width": arguments.get("width", self.settings.default_width),
            "height": arguments.get("height", self.settings.default_height),
        }
        if "num_inference_steps" in arguments:
            parameters["num_inference_steps"] = arguments["num_inference_steps"]
        if "seed" in arguments:
            parameters["seed"] = arguments["seed"]

        logger.info("Generating image", model_url=self.settings.model_url, session=context.session_id)
        image, mime_type = await self._post_inference({
            "inputs": arguments["prompt"],
            "parameters": parameters,
        })

        logger.info("Image generated", bytes=len(image), mime_type=mime_type)
        return ToolResult.image(
            base64.b64encode(image).decode("ascii"),
            mime_type,
            caption=f'Generated image for prompt: "{arguments["prompt"]}"',
        )

    @retry_on_rate_limit
    async def _post_inference(self, body: dict[str, Any]) -> tuple[bytes, str]:
        client = self._get_client()
        response = await client.post(
            self.settings.model_url,
            json=body,
            headers={
                "Authorization": f"Bearer {self.settings.api_key}",
                "Accept": "image/*",
            },
            follow_redirects=True,
        )

        if response.status_code == 429:
            raise RateLimited(parse_retry_after(response.headers.get("Retry-After")))

        if response.is_error:
            message = response.reason_phrase
            if "application/json" in response.headers.get("Content-Type", ""):
                data = response.json()
                if isinstance(data, dict):
                    message = data.get("error", message)
            elif response.text:
                message = response.text[:200]
            raise UpstreamError(response.status_code, message)

        mime_type = response.headers.get("Content-Type", "image/png").split(";")[0].strip()
        return response.content, mime_type


def register_image_gen_provider(hub: "Hub") -> bool:
    """
    Register the image generation provider.

    Returns:
        False if no API key is configured; nothing is registered then
    """
    settings = hub.settings.image_gen
    if not settings.enabled:
        return False
    if not settings.api_key:
        logger.warning("No image generation API key configured, provider not registered")
        return False

    hub.register(ProviderDescriptor(
        name="image-gen",
        description="AI image generation from text prompts",
        version="1.0.0",
        factory=lambda: ImageGenOperations(settings),
    ))
    return True
