"""Image generation API client."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

import requests
from requests import Response

from app.config import Settings

LOGGER = logging.getLogger(__name__)

PALETTES = (
    "muted sage green skin with a warm tan jacket and a faded cream background",
    "dusty olive skin with rust brown clothing and a soft yellow background",
    "aged moss green skin with a charcoal jacket and a pale teal background",
    "weathered jade skin with a mustard cardigan and a dusty rose background",
    "faded teal skin with a navy overcoat and a warm sand background",
    "mossy grey skin with a burgundy sweater and an oatmeal background",
)

PROMPT_TEMPLATE = (
    "Redraw the person in the photo as an older anthropomorphic dinosaur in a "
    "hand-drawn, vintage editorial illustration. Keep their facial features and "
    "proportions recognizable. Give the character a relaxed new pose instead of "
    "the one in the photo. Use visible ink outlines darker than the fills, a "
    "slightly rough texture and warm paper grain.\n"
    "Color palette: {palette}."
)
STYLE_HINT = "Match the line work and texture of the second reference image."


class ImageProviderError(RuntimeError):
    """Raised when the image generation API fails."""


@dataclass(frozen=True)
class UploadedImage:
    content: bytes
    filename: str = "upload.png"
    content_type: str = "image/png"


def pick_palettes(count: int, rng: Optional[random.Random] = None) -> List[str]:
    """Choose ``count`` distinct palettes, cycling when more are requested than exist."""

    rng = rng or random.Random()
    palettes = rng.sample(PALETTES, k=min(count, len(PALETTES)))
    while len(palettes) < count:
        palettes.append(PALETTES[len(palettes) % len(PALETTES)])
    return palettes


def build_prompt(palette: str, *, with_style: bool = False) -> str:
    prompt = PROMPT_TEMPLATE.format(palette=palette)
    if with_style:
        prompt = f"{prompt}\n{STYLE_HINT}"
    return prompt


class ImageProviderClient:
    """Small HTTP client that turns one photo into several styled variants."""

    def __init__(self, settings: Settings, rng: Optional[random.Random] = None) -> None:
        self._settings = settings
        self._rng = rng or random.Random()
        self._session = requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {settings.image_api_key}"})

    def generate_variants(
        self,
        image: UploadedImage,
        *,
        style: Optional[UploadedImage] = None,
        count: Optional[int] = None,
    ) -> List[str]:
        """Return one ``data:`` URL per generated variant."""

        if count is None:
            count = self._settings.image_variants
        images: List[str] = []
        for palette in pick_palettes(count, self._rng):
            prompt = build_prompt(palette, with_style=style is not None)
            b64 = self._edit([image] if style is None else [image, style], prompt)
            images.append(f"data:image/png;base64,{b64}")
        LOGGER.info("generated %d variants", len(images))
        return images

    def _edit(self, images: Sequence[UploadedImage], prompt: str) -> str:
        files = [
            ("image[]", (item.filename, item.content, item.content_type)) for item in images
        ]
        data = {
            "model": self._settings.image_model,
            "prompt": prompt,
            "size": self._settings.image_size,
            "n": "1",
        }
        try:
            response = self._session.post(
                self._settings.images_endpoint,
                data=data,
                files=files,
                timeout=self._settings.image_timeout_seconds,
            )
        except requests.RequestException as exc:
            LOGGER.error("image request failed", extra={"status": type(exc).__name__})
            raise ImageProviderError(f"Image service unreachable: {exc}") from exc
        self._raise_for_status(response)

        try:
            return response.json()["data"][0]["b64_json"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ImageProviderError("Image service returned an unexpected response.") from exc

    def _raise_for_status(self, response: Response) -> None:
        """Raise descriptive errors for image API responses."""

        if response.ok:
            return
        status = response.status_code
        detail = response.text
        if status == 401:
            message = "Unauthorized: verify IMAGE_API_KEY."
        elif status == 400:
            message = "The image service rejected the upload."
        elif status == 429:
            message = "The image service is rate limiting this application."
        else:
            message = f"Image service error ({status})."
        LOGGER.error("image request failed", extra={"status": status})
        raise ImageProviderError(f"{message} Response: {detail[:200]}")
