"""
Vision-Language Model Client
Single entry point for all model calls in the resolution pipeline.
Primary: Gemini 2.5 Flash via litellm
Fallback: VLM_FALLBACK_MODEL on rate limit or error

All free-text cleanup of model output happens here (extract_json); callers
receive either a validated response contract or a ParseError.
"""
import json
import logging
import re
from typing import Optional, Type, TypeVar

import litellm
from pydantic import BaseModel, ValidationError

from shelfmatch.config import VLM_FALLBACK_MODEL, VLM_PRIMARY_MODEL, VLM_TIMEOUT_S
from shelfmatch.services.errors import ModelError, ParseError

logger = logging.getLogger("shelfmatch-llm")

# Suppress litellm verbose logging
litellm.set_verbose = False

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

ContractT = TypeVar("ContractT", bound=BaseModel)


def extract_json(raw: str) -> str:
    """Strip an optional markdown code fence around a JSON payload."""
    return _FENCE_RE.sub("", raw.strip()).strip()


def parse_contract(raw: Optional[str], schema: Type[ContractT]) -> ContractT:
    """Parse-or-fail: raw model text → validated schema instance."""
    if raw is None or not raw.strip():
        raise ParseError("Model returned an empty response", raw_text=raw)
    text = extract_json(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Model returned non-JSON output: {e}", raw_text=raw) from e
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}", raw_text=raw)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Response does not match {schema.__name__}: {e}", raw_text=raw) from e


def _image_part(image_b64: str, mime_type: str = "image/jpeg") -> dict:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{mime_type};base64,{image_b64}"},
    }


async def complete_with_vision(
    images_base64: list[str],
    prompt: str,
    temperature: float = 0.0,
    json_mode: bool = True,
    max_tokens: int = 4096,
    timeout: float = VLM_TIMEOUT_S,
    primary_model: str = VLM_PRIMARY_MODEL,
    fallback_model: str = VLM_FALLBACK_MODEL,
) -> str:
    """
    Vision call with the prompt first and images in the given order.
    Falls back to the secondary model on rate limit or error.
    Returns the response content string.
    """
    content = [{"type": "text", "text": prompt}]
    content.extend(_image_part(img) for img in images_base64)
    kwargs = {
        "messages": [{"role": "user", "content": content}],
        "temperature": temperature,
        "max_tokens": max_tokens,
        "timeout": timeout,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    try:
        response = await litellm.acompletion(model=primary_model, **kwargs)
        return response.choices[0].message.content
    except litellm.RateLimitError:
        logger.warning(f"{primary_model} rate limit hit — falling back to {fallback_model}")
    except litellm.AuthenticationError:
        logger.warning(f"{primary_model} auth error — falling back to {fallback_model}")
    except Exception as e:
        logger.warning(f"{primary_model} error ({type(e).__name__}: {e}) — falling back to {fallback_model}")

    try:
        response = await litellm.acompletion(model=fallback_model, **kwargs)
        return response.choices[0].message.content
    except Exception as e:
        logger.error(f"Both vision models failed. Fallback error: {e}")
        raise ModelError(f"All vision model providers failed. Last error: {e}") from e


class VisionLLMClient:
    """
    Class-based wrapper used by the comparator, consolidator and corrector.
    Tests substitute any object exposing ``vision_json``.
    """

    def __init__(
        self,
        primary_model: str = VLM_PRIMARY_MODEL,
        fallback_model: str = VLM_FALLBACK_MODEL,
        timeout: float = VLM_TIMEOUT_S,
    ):
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.timeout = timeout

    async def vision(self, images_base64: list[str], prompt: str, temperature: float = 0.0) -> str:
        return await complete_with_vision(
            images_base64,
            prompt,
            temperature=temperature,
            timeout=self.timeout,
            primary_model=self.primary_model,
            fallback_model=self.fallback_model,
        )

    async def vision_json(
        self,
        images_base64: list[str],
        prompt: str,
        schema: Type[ContractT],
    ) -> ContractT:
        raw = await self.vision(images_base64, prompt)
        return parse_contract(raw, schema)
