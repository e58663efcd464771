"""Domain model for object uploads: requests, multipart sessions and progress."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from domain.common.exceptions import (
    InvalidSessionStateException,
    InvalidUploadInputException,
)

StorageKey = str

# Provider limit on the number of parts in one multipart upload.
MAX_PARTS = 10_000


class Category(str, Enum):
    DEM = "dem"
    VIDEO = "video"

    @classmethod
    def parse(cls, value: "Category | str") -> "Category":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidUploadInputException(
                f"Unrecognized upload category: {value}",
                field="category",
                details={"allowed": [c.value for c in cls]},
            ) from None


@runtime_checkable
class UploadSource(Protocol):
    """Opaque byte stream with a known size."""

    @property
    def size(self) -> int: ...

    async def read_range(self, start: int, end: int) -> bytes: ...

    async def read_all(self) -> bytes: ...


@dataclass(frozen=True)
class UploadRequest:
    source: UploadSource
    category: Category
    file_name: str
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return self.source.size


@dataclass
class PartRecord:
    part_number: int
    start: int
    end: int
    etag: Optional[str] = None
    attempts: int = 0

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def byte_range(self) -> tuple[int, int]:
        return self.start, self.end

    @property
    def is_done(self) -> bool:
        return self.etag is not None


class SessionState(str, Enum):
    INITIATED = "initiated"
    PARTS_IN_FLIGHT = "parts_in_flight"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.INITIATED: {SessionState.PARTS_IN_FLIGHT, SessionState.ABORTED},
    SessionState.PARTS_IN_FLIGHT: {SessionState.COMPLETING, SessionState.ABORTED},
    # COMPLETING -> ABORTED is caller-directed cleanup after a failed completion call.
    SessionState.COMPLETING: {SessionState.COMPLETED, SessionState.ABORTED},
    SessionState.COMPLETED: set(),
    SessionState.ABORTED: set(),
}


@dataclass
class MultipartSession:
    """State of one multipart upload, owned by a single coordinator."""

    upload_id: str
    key: StorageKey
    parts: list[PartRecord] = field(default_factory=list)
    state: SessionState = SessionState.INITIATED

    @classmethod
    def plan(cls, upload_id: str, key: StorageKey, size: int, part_size: int) -> "MultipartSession":
        """Split ``size`` bytes into contiguous 1-based parts of ``part_size``."""
        return cls(upload_id=upload_id, key=key, parts=plan_parts(size, part_size))

    @property
    def is_terminal(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.ABORTED)

    @property
    def total_bytes(self) -> int:
        return sum(p.size for p in self.parts)

    def part(self, part_number: int) -> PartRecord:
        if not 1 <= part_number <= len(self.parts):
            raise InvalidUploadInputException(
                f"Unknown part number: {part_number}",
                field="part_number",
            )
        return self.parts[part_number - 1]

    def record_etag(self, part_number: int, etag: str) -> None:
        if not etag:
            raise InvalidUploadInputException("Empty ETag", field="etag")
        self.part(part_number).etag = etag

    def pending_parts(self) -> list[PartRecord]:
        return [p for p in self.parts if not p.is_done]

    def is_completable(self) -> bool:
        return bool(self.parts) and all(p.is_done for p in self.parts)

    def completed_parts(self) -> list[tuple[int, str]]:
        """(part_number, etag) pairs in ascending part order.

        Raises locally when any part still lacks an ETag.
        """
        if not self.parts:
            raise InvalidUploadInputException("Multipart session has no parts")
        missing = [p.part_number for p in self.parts if not p.is_done]
        if missing:
            raise InvalidUploadInputException(
                "Cannot complete multipart upload with unfinished parts",
                details={"missing_parts": missing[:20], "missing_count": len(missing)},
            )
        return [(p.part_number, p.etag) for p in sorted(self.parts, key=lambda p: p.part_number)]  # type: ignore[misc]

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidSessionStateException(self.state.value, target.value)
        self.state = target

    def mark_in_flight(self) -> None:
        if self.state is SessionState.PARTS_IN_FLIGHT:
            return
        self._transition(SessionState.PARTS_IN_FLIGHT)

    def mark_completing(self) -> None:
        self.completed_parts()
        self._transition(SessionState.COMPLETING)

    def mark_completed(self) -> None:
        self._transition(SessionState.COMPLETED)

    def mark_aborted(self) -> None:
        self._transition(SessionState.ABORTED)


def plan_parts(size: int, part_size: int) -> list[PartRecord]:
    if size <= 0:
        raise InvalidUploadInputException("Cannot split an empty payload into parts", field="size")
    if part_size <= 0:
        raise InvalidUploadInputException("Part size must be positive", field="part_size")
    count = -(-size // part_size)
    if count > MAX_PARTS:
        raise InvalidUploadInputException(
            f"Payload needs {count} parts, provider allows at most {MAX_PARTS}",
            field="part_size",
            details={"parts": count, "max_parts": MAX_PARTS},
        )
    return [
        PartRecord(part_number=i + 1, start=i * part_size, end=min((i + 1) * part_size, size))
        for i in range(count)
    ]


@dataclass(frozen=True)
class UploadProgress:
    bytes_transferred: int
    bytes_total: int
    percentage: int


@dataclass
class UploadResult:
    key: StorageKey
    size: int
    content_type: str
    etag: Optional[str] = None
    location: Optional[str] = None
    bucket: Optional[str] = None
    region: Optional[str] = None
    upload_id: Optional[str] = None
