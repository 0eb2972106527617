"""
Tests for the Gemini page illustration service.
"""

import pytest
from dataclasses import asdict
from unittest.mock import MagicMock, patch

from config_manager import ApiConfig, AppConfig
from data_models import ArtifactResult
from gemini_service import (
    ArtifactServiceError, GeminiArtifactService, InvalidRequestError,
    QuotaExceededError, RateLimitError
)


@pytest.fixture
def gemini_service(tmp_path):
    """Create a service with the Gemini client patched out"""
    config = AppConfig(api=ApiConfig(rate_limit_delay=0, output_dir=str(tmp_path / "pages")))
    with patch('google.generativeai.configure'):
        with patch('google.generativeai.GenerativeModel'):
            return GeminiArtifactService("test_key", asdict(config))


@pytest.fixture
def page_payload():
    return {
        "story_id": "3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e",
        "page_id": "p1",
        "page_number": 1,
        "text": "Luna walks into the forest.",
        "prompt": "A fox at the edge of a forest",
        "visual_style": "acuarela",
        "color_palette": "pastel",
        "characters": [{"name": "Luna", "description": {"es": "", "en": "A brave fox"}}],
    }


class TestGeminiArtifactService:

    @pytest.mark.asyncio
    async def test_generate_artifact_writes_image(self, gemini_service, page_payload, tmp_path):
        gemini_service._sync_generate_image = MagicMock(return_value=("image/png", b"\x89PNG data"))

        result = await gemini_service.generate_artifact(page_payload)

        assert isinstance(result, ArtifactResult)
        assert result.artifact_url.startswith("file://")
        written = list((tmp_path / "pages").glob("p1_*.png"))
        assert len(written) == 1
        assert written[0].read_bytes() == b"\x89PNG data"
        assert gemini_service.get_statistics()["total_requests"] == 1

    @pytest.mark.asyncio
    async def test_no_internal_retry(self, gemini_service, page_payload):
        gemini_service._sync_generate_image = MagicMock(side_effect=Exception("backend unavailable"))

        with pytest.raises(ArtifactServiceError):
            await gemini_service.generate_artifact(page_payload)

        assert gemini_service._sync_generate_image.call_count == 1
        assert gemini_service.get_statistics()["errors"] == 1

    @pytest.mark.asyncio
    async def test_rate_limit_error(self, gemini_service, page_payload):
        gemini_service._sync_generate_image = MagicMock(
            side_effect=Exception("Rate limit exceeded, retry after 30 seconds")
        )

        with pytest.raises(RateLimitError) as exc_info:
            await gemini_service.generate_artifact(page_payload)

        assert exc_info.value.retry_after == 30

    def test_error_classification(self, gemini_service):
        assert isinstance(gemini_service._classify_error(Exception("Quota exhausted")), QuotaExceededError)
        assert isinstance(gemini_service._classify_error(Exception("Invalid argument")), InvalidRequestError)
        assert type(gemini_service._classify_error(Exception("oops"))) is ArtifactServiceError

    @pytest.mark.asyncio
    async def test_empty_prompt(self, gemini_service):
        with pytest.raises(InvalidRequestError):
            await gemini_service.generate_artifact({"page_id": "p1"})

    def test_prompt_includes_design_and_characters(self, gemini_service, page_payload):
        prompt = gemini_service.build_prompt(page_payload)

        assert prompt.startswith("A fox at the edge of a forest")
        assert "Visual style: acuarela" in prompt
        assert "Character Luna: A brave fox" in prompt
        assert "Scene text: Luna walks into the forest." in prompt

    def test_first_image_part_is_returned(self, gemini_service):
        text_part = MagicMock(inline_data=None)
        image_part = MagicMock()
        image_part.inline_data.mime_type = "image/jpeg"
        image_part.inline_data.data = b"jpeg"
        gemini_service.model.generate_content.return_value = MagicMock(parts=[text_part, image_part])

        assert gemini_service._sync_generate_image("prompt") == ("image/jpeg", b"jpeg")

    def test_response_without_image(self, gemini_service):
        gemini_service.model.generate_content.return_value = MagicMock(parts=[MagicMock(inline_data=None)])

        with pytest.raises(ArtifactServiceError):
            gemini_service._sync_generate_image("prompt")
