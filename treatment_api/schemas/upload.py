"""
Treatment AI Backend — File Upload Schemas
===========================================
"""

from treatment_api.schemas.common import CamelModel


class FileAnalysisResponse(CamelModel):
    """
    Result of POST /api/upload/file.

    Example:
        {"success": true, "fileName": "lab-results.pdf",
         "fileType": "application/pdf", "fileSize": 48211,
         "analysis": "The document is a lipid panel from ..."}
    """
    success: bool = True
    file_name: str
    file_type: str
    file_size: int
    analysis: str
