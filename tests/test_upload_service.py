"""
Treatment AI Backend — Upload Service Unit Tests
=================================================

What:  The validate → stage → analyse → clean up workflow.
How:   FileService and the LLM are mocks; nothing touches disk or network.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from treatment_api.exceptions import LLMServiceError, ValidationError
from treatment_api.services.file_service import DOCX_MIME, PDF_MIME
from treatment_api.services.upload_service import ANALYSIS_MAX_TOKENS, UploadService


@pytest.fixture
def mock_files():
    files = MagicMock()
    files.validate = MagicMock(return_value=(".jpg", "image/jpeg"))
    files.store_file = AsyncMock(return_value=("/tmp/2025/01/15/x.jpg", "2025/01/15/x.jpg"))
    files.extract_text = AsyncMock(return_value="Hemoglobin 10.1 g/dL (low)")
    files.cleanup_file = AsyncMock()
    return files


class TestUploadService:

    @pytest.mark.asyncio
    async def test_image_goes_to_vision_model(self, mock_files, mock_llm):
        mock_llm.describe_image.return_value = "An X-ray of the left wrist."
        service = UploadService(files=mock_files, llm=mock_llm)

        result = await service.analyze("wrist.jpg", b"jpegbytes", 9)

        assert result.success is True
        assert result.file_name == "wrist.jpg"
        assert result.file_type == "image/jpeg"
        assert result.file_size == 9
        assert result.analysis == "An X-ray of the left wrist."
        assert mock_llm.describe_image.await_args.kwargs["max_tokens"] == ANALYSIS_MAX_TOKENS
        mock_llm.complete.assert_not_awaited()
        mock_files.cleanup_file.assert_awaited_once_with("/tmp/2025/01/15/x.jpg")

    @pytest.mark.asyncio
    async def test_document_is_summarised(self, mock_files, mock_llm):
        mock_files.validate.return_value = (".pdf", PDF_MIME)
        mock_llm.complete.return_value = "Your hemoglobin is slightly low."
        service = UploadService(files=mock_files, llm=mock_llm)

        result = await service.analyze("labs.pdf", b"%PDF", 4)

        assert result.analysis == "Your hemoglobin is slightly low."
        mock_files.extract_text.assert_awaited_once_with(b"%PDF", PDF_MIME)
        messages = mock_llm.complete.await_args.args[0]
        assert "Hemoglobin 10.1 g/dL (low)" in messages[1]["content"]
        assert mock_llm.complete.await_args.kwargs["temperature"] == 0.3

    @pytest.mark.asyncio
    async def test_long_document_truncated(self, mock_files, mock_llm):
        mock_files.validate.return_value = (".docx", DOCX_MIME)
        mock_files.extract_text.return_value = "a" * 10_000
        mock_llm.complete.return_value = "summary"
        service = UploadService(files=mock_files, llm=mock_llm)

        await service.analyze("letter.docx", b"PK", 2)

        user_content = mock_llm.complete.await_args.args[0][1]["content"]
        assert user_content.count("a") == 4000

    @pytest.mark.asyncio
    async def test_validation_failure_stores_nothing(self, mock_files, mock_llm):
        mock_files.validate.side_effect = ValidationError("Unsupported file type")
        service = UploadService(files=mock_files, llm=mock_llm)

        with pytest.raises(ValidationError):
            await service.analyze("virus.exe", b"MZ", 2)

        mock_files.store_file.assert_not_awaited()
        mock_files.cleanup_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_llm_failure_still_cleans_up(self, mock_files, mock_llm):
        mock_llm.describe_image.side_effect = LLMServiceError("AI down")
        service = UploadService(files=mock_files, llm=mock_llm)

        with pytest.raises(LLMServiceError):
            await service.analyze("wrist.jpg", b"jpegbytes", 9)

        mock_files.cleanup_file.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreadable_document_still_cleans_up(self, mock_files, mock_llm):
        mock_files.validate.return_value = (".pdf", PDF_MIME)
        mock_files.extract_text.side_effect = ValidationError("No readable text was found in the document.")
        service = UploadService(files=mock_files, llm=mock_llm)

        with pytest.raises(ValidationError, match="No readable text"):
            await service.analyze("scan.pdf", b"%PDF", 4)

        mock_files.cleanup_file.assert_awaited_once()
        mock_llm.complete.assert_not_awaited()
