"""
Treatment AI Backend — File Validation, Storage & Text Extraction
==================================================================

What:  Validates uploaded files, stages them on disk, and extracts text from
       PDF and Word documents.
Why:   Centralizes every file-system and file-format concern so the upload
       and prescription-scan flows only orchestrate.
How:   Extension check, size check, libmagic MIME sniffing, then async write
       to a date-organized directory with a UUID filename. Text comes from
       pypdf (PDF) and python-docx (DOCX).
Who:   Called by UploadService and the prescription-scan route.

Security Model:
    1. Extension check:   fast first rejection
    2. Size check:        bounded memory (10 MB default)
    3. MIME check:        libmagic reads the header bytes, so a renamed
                          executable is rejected even with a .pdf name
    4. UUID filename:     no user input reaches the file system path
"""

import asyncio
import io
import logging
import os
import uuid
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import aiofiles
import docx
import magic
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import DependencyError, PyPdfError

from treatment_api.config import settings
from treatment_api.exceptions import FileStorageError, ValidationError

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOC_MIME = "application/msword"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

# MIME type → extension used for the stored copy
ALLOWED_MIME_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    PDF_MIME: ".pdf",
    DOC_MIME: ".doc",
    DOCX_MIME: ".docx",
}
IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".pdf", ".doc", ".docx"}

# Older libmagic builds report DOCX (a zip container) and DOC (an OLE2
# container) by their container type; the extension disambiguates.
CONTAINER_MIME_ALIASES = {
    ("application/zip", ".docx"): DOCX_MIME,
    ("application/x-zip-compressed", ".docx"): DOCX_MIME,
    ("application/cdfv2", ".doc"): DOC_MIME,
    ("application/x-ole-storage", ".doc"): DOC_MIME,
}


class FileService:
    """
    Directory Structure of staged uploads:
        storage/
        └── 2025/
            └── 01/
                └── 15/
                    ├── a1b2c3d4-....jpg
                    └── e5f6g7h8-....pdf
    """

    def __init__(self, storage_root: Optional[str] = None):
        """
        Args:
            storage_root: Override the default storage path (used in tests).
        """
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.storage_root.mkdir(parents=True, exist_ok=True)
        logger.info("FileService initialized with storage_root=%s", self.storage_root)

    # ── Validation ────────────────────────────────────────────────────────

    def validate_extension(self, filename: str) -> str:
        """Returns the normalized extension or raises ValidationError."""
        ext = Path(filename or "").suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(
                message=(
                    f"File type '{ext or 'unknown'}' is not supported. "
                    f"Allowed types: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
                ),
                field="file",
                context={"extension": ext, "allowed": sorted(ALLOWED_EXTENSIONS)},
            )
        return ext

    def validate_size(self, content_length: Optional[int], actual_size: int) -> None:
        """
        Checks the declared Content-Length first, then the real byte count
        (some clients send a wrong header).
        """
        max_mb = settings.max_file_size / (1024 * 1024)

        if content_length and content_length > settings.max_file_size:
            raise ValidationError(
                message=f"File size exceeds maximum of {max_mb:.0f}MB. Please upload a smaller file.",
                field="file",
                context={"max_size_mb": max_mb, "reported_size": content_length},
            )

        if actual_size > settings.max_file_size:
            raise ValidationError(
                message=f"File size ({actual_size / (1024 * 1024):.1f}MB) exceeds maximum of {max_mb:.0f}MB.",
                field="file",
                context={"max_size_mb": max_mb, "actual_size": actual_size},
            )

        if actual_size == 0:
            raise ValidationError(message="Uploaded file is empty.", field="file")

    def validate_mime_type(self, file_content: bytes, extension: str) -> str:
        """
        Sniff the real MIME type from the header bytes.

        Returns:
            One of ALLOWED_MIME_TYPES.
        Raises:
            ValidationError if the content is not an allowed type.
        """
        try:
            detected = magic.from_buffer(file_content[:8192], mime=True)
        except magic.MagicException as e:
            logger.error("MIME type detection failed: %s", str(e))
            raise FileStorageError(
                message="Could not verify file type. Please try again.",
                context={"error": str(e)},
            ) from e

        mime_type = CONTAINER_MIME_ALIASES.get((detected.lower(), extension), detected)
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(
                message="Unsupported file type",
                field="file",
                context={"detected_mime": detected, "allowed": sorted(ALLOWED_MIME_TYPES)},
            )
        return mime_type

    def validate(
        self, filename: str, content: bytes, content_length: Optional[int] = None
    ) -> Tuple[str, str]:
        """
        Run every check, cheapest first.

        Returns:
            (extension, sniffed MIME type)
        """
        ext = self.validate_extension(filename)
        self.validate_size(content_length, len(content))
        mime_type = self.validate_mime_type(content, ext)
        return ext, mime_type

    # ── Text extraction ───────────────────────────────────────────────────

    async def extract_text(self, content: bytes, mime_type: str) -> str:
        """
        Extract plain text from a PDF or DOCX document.

        Parsing is CPU-bound, so it runs in a worker thread to keep the event
        loop responsive.

        Raises:
            ValidationError: legacy .doc, or a document with no readable text
        """
        if mime_type == PDF_MIME:
            text = await asyncio.to_thread(self._extract_pdf_text, content)
        elif mime_type == DOCX_MIME:
            text = await asyncio.to_thread(self._extract_docx_text, content)
        elif mime_type == DOC_MIME:
            raise ValidationError(
                message="Legacy Word (.doc) files cannot be read. Please upload a PDF or .docx file.",
                field="file",
            )
        else:
            raise ValidationError(message="Unsupported document type", field="file")

        text = text.strip()
        if not text:
            raise ValidationError(
                message="No readable text was found in the document.",
                field="file",
                context={"mime_type": mime_type},
            )
        return text

    @staticmethod
    def _extract_pdf_text(content: bytes) -> str:
        try:
            reader = PdfReader(io.BytesIO(content))
            # An empty user password still opens many "protected" PDFs
            if reader.is_encrypted and not reader.decrypt(""):
                raise ValidationError(
                    message="Password-protected PDFs cannot be read. Please upload an unlocked copy.",
                    field="file",
                )
            return "\n".join(page.extract_text() or "" for page in reader.pages)
        except DependencyError as e:
            # AES-encrypted files need the optional cryptography backend
            raise ValidationError(
                message="Password-protected PDFs cannot be read. Please upload an unlocked copy.",
                field="file",
                context={"error": str(e)},
            ) from e
        except (PyPdfError, ValueError) as e:
            raise ValidationError(
                message="Error processing PDF document",
                field="file",
                context={"error": str(e)},
            ) from e

    @staticmethod
    def _extract_docx_text(content: bytes) -> str:
        try:
            document = docx.Document(io.BytesIO(content))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise ValidationError(
                message="Error processing Word document",
                field="file",
                context={"error": str(e)},
            ) from e
        return "\n".join(paragraph.text for paragraph in document.paragraphs)

    # ── Storage ───────────────────────────────────────────────────────────

    def _generate_storage_path(self, extension: str) -> Tuple[Path, str]:
        """YYYY/MM/DD/<uuid><ext> under the storage root."""
        now = datetime.now(timezone.utc)
        relative_path = f"{now.strftime('%Y/%m/%d')}/{uuid.uuid4()}{extension}"
        return self.storage_root / relative_path, relative_path

    async def store_file(self, content: bytes, extension: str) -> Tuple[str, str]:
        """
        Write validated content to disk with async I/O.

        Returns:
            (absolute_path, relative_path)
        Raises:
            FileStorageError on disk errors.
        """
        absolute_path, relative_path = self._generate_storage_path(extension)

        try:
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(absolute_path, "wb") as f:
                await f.write(content)
        except OSError as e:
            logger.error("Failed to store file at %s: %s", absolute_path, str(e))
            raise FileStorageError(
                message="Failed to save uploaded file. Please try again.",
                context={"path": relative_path, "os_error": str(e)},
            ) from e

        logger.info("File stored: %s (%d bytes)", relative_path, len(content))
        return str(absolute_path), relative_path

    async def cleanup_file(self, file_path: str) -> None:
        """
        Remove a staged file. Best-effort: a failed delete is logged, not
        raised, because the user's request has already been answered.
        """
        path = Path(file_path)
        try:
            if path.exists():
                os.remove(path)
                logger.info("Cleaned up file: %s", path.name)
        except OSError as e:
            logger.warning("Failed to clean up file %s: %s", path.name, str(e))


# ── Singleton Instance ────────────────────────────────────────────────────
file_service = FileService()
