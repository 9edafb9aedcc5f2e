from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from google import genai
from google.genai import types as genai_types

from core.errors import DecodeError, InputError, ServiceError
from core.raster import Raster


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Suggestion:
    title: str
    prompt: str


class EditService(Protocol):
    """Blocking calls to the generative backend. The session runs them off the event loop."""

    def edit(
        self,
        image: Raster,
        prompt: str,
        hotspot: Optional[Tuple[int, int]] = None,
        mask: Optional[Raster] = None,
    ) -> Raster: ...

    def global_edit(self, image: Raster, prompt: str, kind: str = "adjustment") -> Raster: ...

    def remove(self, image: Raster, mask: Raster) -> Raster: ...

    def upscale(self, image: Raster) -> Raster: ...

    def suggestions(self, image: Raster) -> List[Suggestion]: ...

    def enhance_prompt(self, text: str) -> str: ...


_SAFETY_POLICY = """
Safety policy:
- Skin tone adjustments such as a tan or lighter/darker skin are ordinary photo edits and must be performed.
- Never change a person's race or ethnicity. Refuse such requests, and leave racial characteristics untouched when a request is ambiguous.
"""

_LAYER_OUTPUT = """
Output requirements:
- Return a transparent PNG the same size as the input frame, containing only the generated element.
- Everything outside the element must be fully transparent.
- Do not return the original photo, the mask or any text.
"""


def _point_edit_prompt(user_prompt: str, hotspot: Tuple[int, int]) -> str:
    return (
        "You are a professional photo retoucher. Make a realistic, localized edit to the photo.\n"
        f'Request: "{user_prompt}"\n'
        f"Location: centre the edit around pixel (x: {hotspot[0]}, y: {hotspot[1]}).\n"
        "The element must sit exactly where it would appear on the original photo."
        + _LAYER_OUTPUT
        + _SAFETY_POLICY
    )


def _mask_edit_prompt(user_prompt: str) -> str:
    return (
        "You are a professional photo retoucher. Generate the requested element inside the area "
        "marked by the second image (opaque pixels mark the area).\n"
        f'Request: "{user_prompt}"\n'
        "The element must blend with anything it overlaps."
        + _LAYER_OUTPUT
        + _SAFETY_POLICY
    )


_REMOVAL_PROMPT = (
    "You are a professional photo retoucher specialised in inpainting. Remove the object covered by "
    "the opaque pixels of the second image and reconstruct the background behind it so that texture, "
    "lighting and colour continue naturally. Return only the full edited photo, no text."
)

_UPSCALE_PROMPT = (
    "Upscale this photo to exactly twice its width and height. Recover detail and sharpness "
    "photorealistically. Do not add, remove or move anything. Return only the image, no text."
)

_SUGGESTIONS_PROMPT = (
    "You are a photo art director. Study the photo and propose three concrete improvements: "
    "one creative filter suited to the subject and mood, one targeted sharpening of specific "
    "details, and one lighting or colour adjustment. Every prompt must refer to what is actually "
    "in this photo rather than generic advice. Respond with a JSON array of three objects with "
    "'title' and 'prompt' keys."
)


def _global_prompt(user_prompt: str, kind: str) -> str:
    if kind == "filter":
        return (
            "You are a professional photo retoucher. Apply this stylistic filter to the whole photo "
            "without changing its composition or content.\n"
            f'Filter: "{user_prompt}"\n'
            "Colour shifts must never alter a person's race or ethnicity.\n"
            "Return only the filtered image, no text."
        )
    return (
        "You are a professional photo retoucher. Apply this adjustment across the whole photo and "
        "keep the result photorealistic.\n"
        f'Adjustment: "{user_prompt}"\n'
        + _SAFETY_POLICY
        + "Return only the adjusted image, no text."
    )


def _enhance_prompt_text(text: str) -> str:
    return (
        "Rewrite the following request for an AI photo editor as one detailed, precise and "
        "photorealistic instruction. Reply with the rewritten instruction only.\n\n"
        f'Request: "{text}"\n'
        "Rewritten instruction:"
    )


def _enum_name(value) -> str:
    return str(getattr(value, "name", value) or "")


def parse_image_response(response, context: str) -> Raster:
    """
    Extract the first inline image from a generate_content response.

    Checked in order: prompt block, image part, abnormal finish reason, text
    feedback. Every miss becomes a ServiceError carrying `context`.
    """
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None) if feedback is not None else None
    if block_reason:
        detail = getattr(feedback, "block_reason_message", None) or ""
        raise ServiceError(f"Request was blocked. Reason: {_enum_name(block_reason)}. {detail}".strip(), context)

    candidates = getattr(response, "candidates", None) or []
    first = candidates[0] if candidates else None
    content = getattr(first, "content", None)
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is None or not getattr(inline, "data", None):
            continue
        data = inline.data
        if isinstance(data, str):
            data = base64.b64decode(data)
        try:
            raster = Raster.from_bytes(data, mime_type=getattr(inline, "mime_type", None), verify=True)
        except DecodeError as e:
            raise ServiceError(f"The model returned an unreadable image ({e.message})", context) from e
        logger.info("received %s image for %s", raster.mime_type, context)
        return raster

    finish = _enum_name(getattr(first, "finish_reason", None))
    if finish and finish != "STOP":
        raise ServiceError(
            f"Image generation stopped unexpectedly. Reason: {finish}. This often relates to safety settings.",
            context,
        )

    text = (getattr(response, "text", None) or "").strip()
    if text:
        raise ServiceError(f'The model did not return an image. It responded with text: "{text}"', context)
    raise ServiceError(
        "The model did not return an image. This can happen due to safety filters or if the request "
        "is too complex; try rephrasing the prompt.",
        context,
    )


def parse_suggestions(raw: str) -> List[Suggestion]:
    try:
        items = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ServiceError(f"suggestions were not valid JSON ({e})", "suggestions") from e
    if not isinstance(items, list):
        raise ServiceError("suggestions were not a list", "suggestions")
    out: List[Suggestion] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or "").strip()
        prompt = str(item.get("prompt") or "").strip()
        if title and prompt:
            out.append(Suggestion(title=title, prompt=prompt))
    if not out:
        raise ServiceError("The AI returned no valid suggestions.", "suggestions")
    return out


def _image_part(raster: Raster) -> genai_types.Part:
    return genai_types.Part.from_bytes(data=raster.data, mime_type=raster.mime_type)


class GeminiEditService:
    def __init__(
        self,
        api_key: Optional[str],
        image_model: str = "gemini-2.5-flash-image-preview",
        text_model: str = "gemini-2.5-flash",
        timeout: float = 90.0,
    ):
        self._api_key = api_key
        self.image_model = image_model
        self.text_model = text_model
        self.timeout = float(timeout)
        self._client: Optional[genai.Client] = None

    @classmethod
    def from_config(cls, cfg) -> "GeminiEditService":
        return cls(cfg.api_key, cfg.image_model, cfg.text_model, cfg.request_timeout)

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self._api_key:
                raise ServiceError(
                    "The Gemini API key is missing. Set GEMINI_API_KEY (or API_KEY) in the environment."
                )
            self._client = genai.Client(
                api_key=self._api_key,
                http_options={"timeout": int(self.timeout * 1000)},
            )
        return self._client

    def _generate(self, model: str, contents, context: str, config=None):
        client = self._get_client()
        try:
            return client.models.generate_content(model=model, contents=contents, config=config)
        except ServiceError:
            raise
        except Exception as e:
            raise ServiceError(f"request failed ({e})", context) from e

    def _image_call(self, parts: list, context: str) -> Raster:
        logger.info("sending %s request to %s", context, self.image_model)
        response = self._generate(self.image_model, parts, context)
        return parse_image_response(response, context)

    def edit(self, image, prompt, hotspot=None, mask=None):
        if hotspot is None and mask is None:
            raise InputError("Either a hotspot or a mask is required for editing.", "edit")
        parts = [_image_part(image)]
        if mask is not None:
            parts.append(_image_part(mask))
            text = _mask_edit_prompt(prompt)
        else:
            text = _point_edit_prompt(prompt, hotspot)
        parts.append(genai_types.Part.from_text(text=text))
        return self._image_call(parts, "edit")

    def global_edit(self, image, prompt, kind="adjustment"):
        parts = [_image_part(image), genai_types.Part.from_text(text=_global_prompt(prompt, kind))]
        return self._image_call(parts, kind)

    def remove(self, image, mask):
        parts = [_image_part(image), _image_part(mask), genai_types.Part.from_text(text=_REMOVAL_PROMPT)]
        return self._image_call(parts, "removal")

    def upscale(self, image):
        parts = [_image_part(image), genai_types.Part.from_text(text=_UPSCALE_PROMPT)]
        return self._image_call(parts, "upscale")

    def suggestions(self, image):
        schema = genai_types.Schema(
            type=genai_types.Type.ARRAY,
            items=genai_types.Schema(
                type=genai_types.Type.OBJECT,
                properties={
                    "title": genai_types.Schema(type=genai_types.Type.STRING),
                    "prompt": genai_types.Schema(type=genai_types.Type.STRING),
                },
                required=["title", "prompt"],
            ),
        )
        config = genai_types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=schema,
        )
        parts = [_image_part(image), genai_types.Part.from_text(text=_SUGGESTIONS_PROMPT)]
        response = self._generate(self.text_model, parts, "suggestions", config=config)
        return parse_suggestions((getattr(response, "text", None) or "").strip())

    def enhance_prompt(self, text):
        if not text.strip():
            return ""
        try:
            response = self._generate(self.text_model, _enhance_prompt_text(text), "enhance prompt")
        except ServiceError as e:
            logger.warning("prompt enhancement failed, keeping original: %s", e)
            return text
        enhanced = (getattr(response, "text", None) or "").strip()
        if not enhanced:
            return text
        lines = [line.strip() for line in enhanced.splitlines() if line.strip()]
        return lines[-1] if lines else enhanced
