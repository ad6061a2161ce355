"""
Model Inference Endpoint
========================
Transport to the vision model. One request per page: the page image plus
a fixed instruction; the response is an ordered stream of text chunks.

The OpenAI-compatible adapter works with any provider exposing the chat
completions API (OpenAI, Gemini's compatible endpoint, Qwen, ...).
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, Optional

import openai
from openai import OpenAI

from .errors import EndpointError, ExtractionTimeout, MalformedStream

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceRequest:
    """What the endpoint receives for one page."""
    image: bytes
    format: str
    instruction: str

    @property
    def data_url(self) -> str:
        mime = "image/jpeg" if self.format in ("jpg", "jpeg") else f"image/{self.format}"
        b64 = base64.b64encode(self.image).decode("ascii")
        return f"data:{mime};base64,{b64}"


class ChunkStream(ABC):
    """
    Ordered text chunks for one request.

    Iteration ends normally only when the endpoint signalled completion.
    close() aborts the underlying transport and may be called from another
    thread while iteration is in progress.
    """

    @abstractmethod
    def __iter__(self) -> Iterator[str]:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class InferenceEndpoint(ABC):
    """Opens one chunk stream per page request."""

    @abstractmethod
    def open_stream(self, request: InferenceRequest, timeout_s: float) -> ChunkStream:
        ...


class _OpenAIChunkStream(ChunkStream):
    def __init__(self, response):
        self._response = response

    def __iter__(self) -> Iterator[str]:
        finished = False
        try:
            for event in self._response:
                # Usage-only events carry no choices
                if not event.choices:
                    continue
                choice = event.choices[0]
                delta = getattr(choice, "delta", None)
                piece = getattr(delta, "content", None) if delta is not None else None
                if piece is not None and not isinstance(piece, str):
                    raise MalformedStream(
                        f"Unexpected chunk payload: {type(piece).__name__}"
                    )
                if piece:
                    yield piece
                if choice.finish_reason:
                    finished = True
                    if choice.finish_reason == "length":
                        logger.warning("Model output truncated at max_output_tokens")
        except MalformedStream:
            raise
        except openai.APITimeoutError as e:
            raise ExtractionTimeout(f"Endpoint timed out mid-stream: {e}") from e
        except openai.APIError as e:
            raise EndpointError(f"Endpoint stream failed: {e}") from e
        except Exception as e:
            raise EndpointError(f"Stream interrupted: {e}") from e

        if not finished:
            raise MalformedStream("Stream ended without a completion marker")

    def close(self) -> None:
        self._response.close()


class OpenAIVisionEndpoint(InferenceEndpoint):
    """Streams page markup from an OpenAI-compatible vision model."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o",
        base_url: Optional[str] = None,
        temperature: float = 0.2,
        max_output_tokens: int = 4096,
    ):
        if not api_key:
            raise EndpointError(
                "Missing OPENAI_API_KEY. Set it in the environment or in ExtractionConfig.api_key."
            )
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        # Retries are owned by the orchestrator
        self._client = OpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    @classmethod
    def from_config(cls, config) -> "OpenAIVisionEndpoint":
        return cls(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
        )

    def open_stream(self, request: InferenceRequest, timeout_s: float) -> ChunkStream:
        messages = [
            {"role": "system", "content": request.instruction},
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": request.data_url}},
                ],
            },
        ]
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_output_tokens,
                timeout=timeout_s,
                stream=True,
            )
        except openai.APITimeoutError as e:
            raise ExtractionTimeout(f"Endpoint timed out: {e}") from e
        except openai.APIStatusError as e:
            raise EndpointError(
                f"Endpoint returned HTTP {e.status_code}: {e.message}"
            ) from e
        except openai.APIError as e:
            raise EndpointError(f"Endpoint request failed: {e}") from e

        return _OpenAIChunkStream(response)
