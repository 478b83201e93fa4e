"""
Treatment AI Backend — Upload Analysis Service
===============================================

What:  Turns an uploaded medical file (photo, scan, PDF, Word document) into
       a plain-language analysis the chat can use as context.
Why:   Patients share lab results and discharge letters as files; the
       diagnostic chat only understands text.
How:   1. FileService validates extension, size and sniffed MIME type
       2. The bytes are staged on disk for the duration of the request
       3. Images go to the vision model; documents are reduced to text,
          truncated, and summarised with a chat completion
       4. The staged copy is removed whatever the outcome
Who:   Called by routes/upload.py.
"""

import logging
from typing import Optional

from treatment_api.config import settings
from treatment_api.schemas.upload import FileAnalysisResponse
from treatment_api.services.file_service import IMAGE_MIME_TYPES, FileService, file_service
from treatment_api.services.llm_base import LLMService
from treatment_api.services.openai_service import openai_service

logger = logging.getLogger(__name__)

IMAGE_PROMPT = (
    "You are helping a patient understand a medical image they uploaded. "
    "Describe what it shows, point out anything clinically relevant, and "
    "keep the explanation in plain language. Do not give a diagnosis."
)

DOCUMENT_SYSTEM_PROMPT = (
    "You summarise medical documents for patients. Highlight results, "
    "values outside reference ranges, diagnoses and follow-up instructions. "
    "Use plain language and do not add information that is not in the text."
)

ANALYSIS_MAX_TOKENS = 1000


class UploadService:

    def __init__(self, files: FileService = file_service, llm: LLMService = openai_service):
        self.files = files
        self.llm = llm

    async def analyze(
        self,
        filename: str,
        content: bytes,
        content_length: Optional[int] = None,
    ) -> FileAnalysisResponse:
        """
        Validate, stage, analyse and clean up one upload.

        Raises:
            ValidationError: bad extension, size, type or unreadable document (400)
            FileStorageError: staging failed (500)
            LLMServiceError / CircuitBreakerOpenError: model unavailable (503)
        """
        ext, mime_type = self.files.validate(filename, content, content_length)
        absolute_path, relative_path = await self.files.store_file(content, ext)

        try:
            if mime_type in IMAGE_MIME_TYPES:
                analysis = await self.llm.describe_image(
                    content, mime_type, IMAGE_PROMPT, max_tokens=ANALYSIS_MAX_TOKENS
                )
            else:
                analysis = await self._summarize_document(content, mime_type)
        finally:
            await self.files.cleanup_file(absolute_path)

        logger.info(
            "Upload analysed: %s (%s, %d bytes, staged as %s)",
            filename, mime_type, len(content), relative_path,
        )
        return FileAnalysisResponse(
            file_name=filename,
            file_type=mime_type,
            file_size=len(content),
            analysis=analysis,
        )

    async def _summarize_document(self, content: bytes, mime_type: str) -> str:
        text = await self.files.extract_text(content, mime_type)
        excerpt = text[: settings.max_document_chars]
        if len(text) > len(excerpt):
            logger.debug("Document text truncated from %d to %d chars", len(text), len(excerpt))

        return await self.llm.complete(
            [
                {"role": "system", "content": DOCUMENT_SYSTEM_PROMPT},
                {"role": "user", "content": f"Summarise this document:\n\n{excerpt}"},
            ],
            temperature=0.3,
            max_tokens=ANALYSIS_MAX_TOKENS,
        )


# ── Singleton Instance ────────────────────────────────────────────────────
upload_service = UploadService()
