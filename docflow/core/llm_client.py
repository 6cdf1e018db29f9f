import asyncio
from typing import Any, Dict, Optional

from aiolimiter import AsyncLimiter
from google import genai
from google.genai import types

from docflow.core.config import LLMSettings
from docflow.core.exceptions import APIClientError, ExtractionOutputError
from docflow.core.rate_limit import get_model_limiter
from docflow.utils.json_parser import parse_json_safely
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class GeminiExtractionClient:
    """Wrapper around the Google Gemini API for document extraction.

    Sends raw document bytes together with a prompt and returns the parsed
    JSON object the model produced.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        max_retries: int = 2,
        client: Optional[genai.Client] = None,
        rate_limiter: Optional[AsyncLimiter] = None,
    ):
        """Initialize Gemini client.

        Args:
            api_key: Gemini API key
            model: Model name to use
            max_retries: Attempts per call before surfacing the error.
                Temporal retries the surrounding activity on top of this.
            client: Pre-built SDK client, mainly for tests
            rate_limiter: Acquired once before every API call, retries included
        """
        self.api_key = api_key
        self.model = model
        self.max_retries = max(1, max_retries)
        self.rate_limiter = rate_limiter

        if client is not None:
            self.client = client
            return
        try:
            self.client = genai.Client(api_key=self.api_key)
            LOGGER.info(f"Initialized Gemini client with model {self.model}")
        except Exception as e:
            LOGGER.error(f"Failed to initialize Gemini client: {e}")
            raise APIClientError(f"Failed to initialize Gemini client: {e}", original_error=e)

    async def extract(
        self,
        document_bytes: bytes,
        prompt: str,
        mime_type: str = "application/pdf",
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run one extraction call over a document.

        Args:
            document_bytes: Raw document content
            prompt: Instruction text sent alongside the document
            mime_type: MIME type of ``document_bytes``
            generation_config: Optional overrides (temperature, max_output_tokens)

        Returns:
            The JSON object returned by the model

        Raises:
            APIClientError: If the API call keeps failing
            ExtractionOutputError: If the response is not a JSON object
        """
        config = types.GenerateContentConfig(
            temperature=0.0,
            response_mime_type="application/json",
        )
        if generation_config:
            if "temperature" in generation_config:
                config.temperature = generation_config["temperature"]
            if "max_output_tokens" in generation_config:
                config.max_output_tokens = generation_config["max_output_tokens"]

        contents = [
            types.Part.from_bytes(data=document_bytes, mime_type=mime_type),
            prompt,
        ]

        text = None
        for attempt in range(self.max_retries):
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            try:
                response = await self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config,
                )
                text = response.text
                break
            except Exception as e:
                LOGGER.warning(
                    f"Gemini API error (Attempt {attempt + 1}/{self.max_retries}): {e}",
                    extra={"model": self.model, "document_size": len(document_bytes)}
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** attempt)
                else:
                    raise APIClientError(f"Gemini generation failed: {e}", original_error=e)

        if not text:
            raise ExtractionOutputError("Empty response from extraction model")

        parsed = parse_json_safely(text)
        if not isinstance(parsed, dict):
            raise ExtractionOutputError(
                f"Extraction model returned {type(parsed).__name__}, expected a JSON object"
            )
        return parsed


def build_gemini_client(llm: LLMSettings) -> GeminiExtractionClient:
    """Client for the configured model, throttled unless rate limiting is off."""
    rate_limiter = None
    if llm.gemini_rate_limit_enabled:
        rate_limiter = get_model_limiter(llm.gemini_model, llm.gemini_requests_per_minute)
    return GeminiExtractionClient(
        api_key=llm.gemini_api_key,
        model=llm.gemini_model,
        max_retries=llm.extraction_max_retries,
        rate_limiter=rate_limiter,
    )
