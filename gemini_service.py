"""
Page illustration service backed by the Google Gemini API.
Implements the `generate_artifact(payload)` contract used by the bulk orchestrator.
"""

import asyncio
import hashlib
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import google.generativeai as genai

from data_models import ArtifactResult

logger = logging.getLogger(__name__)

_MIME_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


class ArtifactServiceError(Exception):
    """Base exception for generation service errors"""
    pass


class RateLimitError(ArtifactServiceError):
    """Raised when rate limit is exceeded"""
    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class QuotaExceededError(ArtifactServiceError):
    """Raised when API quota is exceeded"""
    pass


class InvalidRequestError(ArtifactServiceError):
    """Raised for invalid requests"""
    pass


class GeminiArtifactService:
    """Generates one illustration per page; never retries on its own"""

    def __init__(self, api_key: str, config: Dict[str, Any]):
        self.config = config
        self._api_config = config.get("api", {})
        self._model_name = self._api_config.get("model", "gemini-2.0-flash-preview-image-generation")
        self._timeout = self._api_config.get("timeout", 120)
        self._output_dir = Path(self._api_config.get("output_dir", "generated_pages"))

        # Rate limiting
        self._rate_limit_delay = self._api_config.get("rate_limit_delay", 1.0)
        self._last_api_call = 0.0
        self._request_queue: List[float] = []
        self._max_requests_per_minute = self._api_config.get("max_requests_per_minute", 60)
        self._rate_lock = asyncio.Lock()

        self._stats = {
            "total_requests": 0,
            "errors": 0,
            "total_generation_time": 0.0
        }

        try:
            genai.configure(api_key=api_key)
            self.model = genai.GenerativeModel(self._model_name)
            logger.info(f"Initialized Gemini API with model: {self._model_name}")
        except Exception as e:
            raise ArtifactServiceError(f"Failed to initialize Gemini API: {e}") from e

    async def _enforce_rate_limit(self):
        """Enforce rate limiting with sliding window"""
        async with self._rate_lock:
            current_time = time.time()

            cutoff_time = current_time - 60
            self._request_queue = [t for t in self._request_queue if t > cutoff_time]

            if len(self._request_queue) >= self._max_requests_per_minute:
                sleep_time = 60 - (current_time - self._request_queue[0])
                if sleep_time > 0:
                    logger.warning(f"Rate limit reached, sleeping for {sleep_time:.2f} seconds")
                    await asyncio.sleep(sleep_time)
                    current_time = time.time()

            time_since_last = current_time - self._last_api_call
            if time_since_last < self._rate_limit_delay:
                await asyncio.sleep(self._rate_limit_delay - time_since_last)
                current_time = time.time()

            self._request_queue.append(current_time)
            self._last_api_call = current_time

    def _classify_error(self, error: Exception) -> Exception:
        """Classify and convert generic errors to specific types"""
        if isinstance(error, ArtifactServiceError):
            return error
        error_msg = str(error).lower()

        if "quota" in error_msg or "limit" in error_msg:
            if "rate" in error_msg:
                return RateLimitError(str(error), self._extract_retry_after(str(error)))
            return QuotaExceededError(str(error))
        elif "invalid" in error_msg or "bad request" in error_msg:
            return InvalidRequestError(str(error))
        return ArtifactServiceError(str(error))

    def _extract_retry_after(self, error_message: str) -> Optional[int]:
        match = re.search(r'retry.*?(\d+)', error_message, re.IGNORECASE)
        return int(match.group(1)) if match else None

    def build_prompt(self, payload: Dict[str, Any]) -> str:
        """Turn a page payload into an illustration prompt"""
        lines = [payload.get("prompt") or payload.get("text", "")]
        if payload.get("visual_style"):
            lines.append(f"Visual style: {payload['visual_style']}")
        if payload.get("color_palette"):
            lines.append(f"Color palette: {payload['color_palette']}")
        for character in payload.get("characters", []):
            description = character.get("description") or {}
            text = description.get("en") or description.get("es") or ""
            lines.append(f"Character {character.get('name', '')}: {text}".strip())
        if payload.get("text"):
            lines.append(f"Scene text: {payload['text']}")
        return "\n".join(line for line in lines if line)

    async def generate_artifact(self, payload: Dict[str, Any]) -> ArtifactResult:
        """Generate the illustration for one page and store it under output_dir"""
        page_id = payload.get("page_id", "page")
        prompt = self.build_prompt(payload)
        if not prompt:
            raise InvalidRequestError(f"Empty prompt for page {page_id}")

        self._stats["total_requests"] += 1
        start_time = time.time()
        try:
            await self._enforce_rate_limit()
            loop = asyncio.get_running_loop()
            mime_type, data = await asyncio.wait_for(
                loop.run_in_executor(None, self._sync_generate_image, prompt),
                timeout=self._timeout
            )
        except asyncio.TimeoutError:
            self._stats["errors"] += 1
            raise ArtifactServiceError(f"Request timed out after {self._timeout} seconds")
        except Exception as e:
            self._stats["errors"] += 1
            raise self._classify_error(e) from e

        generation_time = time.time() - start_time
        self._stats["total_generation_time"] += generation_time

        path = self._write_image(page_id, prompt, mime_type, data)
        logger.debug(f"Generated image for page {page_id} in {generation_time:.2f}s")

        return ArtifactResult(
            artifact_url=path.resolve().as_uri(),
            metadata={"generation_time": generation_time, "model": self._model_name}
        )

    def _sync_generate_image(self, prompt: str):
        """Synchronous generation; returns (mime_type, bytes) of the first image part"""
        response = self.model.generate_content(
            prompt,
            generation_config={"response_modalities": ["TEXT", "IMAGE"]}
        )

        if not response or not response.parts:
            raise ArtifactServiceError("API returned empty response")

        for part in response.parts:
            inline_data = getattr(part, "inline_data", None)
            if inline_data is not None and inline_data.data:
                return inline_data.mime_type, inline_data.data

        raise ArtifactServiceError("API response contained no image")

    def _write_image(self, page_id: str, prompt: str, mime_type: str, data: bytes) -> Path:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256(prompt.encode()).hexdigest()[:12]
        extension = _MIME_EXTENSIONS.get(mime_type, ".png")
        path = self._output_dir / f"{page_id}_{digest}{extension}"
        temp_path = path.with_suffix(".tmp")
        temp_path.write_bytes(data)
        temp_path.replace(path)
        return path

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "average_generation_time": (
                self._stats["total_generation_time"] / self._stats["total_requests"]
                if self._stats["total_requests"] > 0 else 0
            ),
            "model": self._model_name,
        }
