"""Upload domain exports."""
from .entity import (
    MAX_PARTS,
    Category,
    MultipartSession,
    PartRecord,
    SessionState,
    StorageKey,
    UploadProgress,
    UploadRequest,
    UploadResult,
    UploadSource,
    plan_parts,
)

__all__ = [
    "MAX_PARTS",
    "Category",
    "MultipartSession",
    "PartRecord",
    "SessionState",
    "StorageKey",
    "UploadProgress",
    "UploadRequest",
    "UploadResult",
    "UploadSource",
    "plan_parts",
]
