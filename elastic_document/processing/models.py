from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

WORDS_PER_MINUTE = 230
MAX_SOURCES = 10
MIN_READING_MINUTES = 1
MAX_READING_MINUTES = 1000
USAGE_LIMIT_PER_DAY = 50

# Canned reply the generation service gives when the extracted text is unusable.
EMPTY_CONTENT_PHRASE = "appears to be empty or could not be read"

COMPLEXITY_LEVELS = ("very_simple", "simple", "standard")

LANGUAGES = (
    "English",
    "Spanish",
    "French",
    "German",
    "Italian",
    "Portuguese",
    "Dutch",
    "Russian",
    "Chinese (Simplified)",
    "Chinese (Traditional)",
    "Japanese",
    "Korean",
    "Arabic",
    "Hindi",
    "Bengali",
    "Turkish",
    "Vietnamese",
    "Thai",
    "Polish",
    "Ukrainian",
    "Swedish",
    "Norwegian",
    "Danish",
    "Finnish",
    "Czech",
    "Romanian",
    "Hungarian",
    "Greek",
    "Hebrew",
    "Indonesian",
    "Malay",
    "Tagalog",
    "Swahili",
    "Persian",
)


def new_id() -> str:
    return uuid.uuid4().hex


def usage_window_start(now: Optional[datetime] = None) -> datetime:
    """Start of the current daily usage window (UTC midnight)."""
    now = now or datetime.utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class SourceKind(str, Enum):
    FILE = "file"
    URL = "url"


class ExtractionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ALREADY_IN_PROGRESS = "already_in_progress"
    ALREADY_COMPLETE = "already_complete"


class OutputVariant(str, Enum):
    FORMATTED = "formatted"
    BREADTEXT = "breadtext"


class EventType(str, Enum):
    STATUS = "status"
    FORMATTED_CHUNK = "formatted_chunk"
    BREADTEXT_CHUNK = "breadtext_chunk"
    CONTENT = "content"
    BREADTEXT = "breadtext"
    FORMATTED_DONE = "formatted_done"
    BREADTEXT_DONE = "breadtext_done"
    ERROR = "error"
    IMAGES = "images"
    DONE = "done"


@dataclass
class SourceRecord:
    id: str
    job_id: str
    position: int
    kind: SourceKind
    display_name: str
    file_location: str = ""
    source_url: Optional[str] = None
    file_type: str = "application/octet-stream"
    file_size: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class JobRecord:
    id: str
    owner_id: str
    reading_minutes: int
    complexity: str
    language: str
    sources: List[SourceRecord] = field(default_factory=list)
    extraction_state: ExtractionState = ExtractionState.NOT_STARTED
    extracted_text: str = ""
    extracted_images: List[str] = field(default_factory=list)
    formatted_output: str = ""
    breadtext_output: str = ""
    output_images: List[str] = field(default_factory=list)
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_complete(self) -> bool:
        return bool(self.formatted_output)


@dataclass
class ClaimResult:
    outcome: ClaimOutcome
    token: Optional[str] = None


@dataclass
class OcrResult:
    markdown: str
    images: List[str] = field(default_factory=list)


@dataclass
class ScrapeResult:
    stored_location: str
    display_name: str
    markdown: str


@dataclass
class ExtractionResult:
    combined_text: str
    images: List[str] = field(default_factory=list)


@dataclass
class GenerationRequest:
    extracted_text: str
    images: List[str]
    reading_minutes: int
    complexity: str
    language: str

    @property
    def target_words(self) -> int:
        return self.reading_minutes * WORDS_PER_MINUTE

    @classmethod
    def from_job(cls, job: JobRecord, extracted_text: str, images: List[str]) -> "GenerationRequest":
        return cls(
            extracted_text=extracted_text,
            images=list(images),
            reading_minutes=job.reading_minutes,
            complexity=job.complexity,
            language=job.language,
        )


# Payload keys carried by each event type on the wire.
_PAYLOAD_FIELDS: Dict[EventType, tuple] = {
    EventType.STATUS: ("message",),
    EventType.FORMATTED_CHUNK: ("text",),
    EventType.BREADTEXT_CHUNK: ("text",),
    EventType.CONTENT: ("text",),
    EventType.BREADTEXT: ("text",),
    EventType.FORMATTED_DONE: (),
    EventType.BREADTEXT_DONE: (),
    EventType.ERROR: ("message",),
    EventType.IMAGES: ("images",),
    EventType.DONE: (),
}

_CHUNK_TYPES = {
    OutputVariant.FORMATTED: EventType.FORMATTED_CHUNK,
    OutputVariant.BREADTEXT: EventType.BREADTEXT_CHUNK,
}

_DONE_TYPES = {
    OutputVariant.FORMATTED: EventType.FORMATTED_DONE,
    OutputVariant.BREADTEXT: EventType.BREADTEXT_DONE,
}


@dataclass(frozen=True)
class StreamEvent:
    """
    One tagged record of the job's event stream. Build instances through the
    classmethods so each type only ever carries the fields it owns.
    """

    type: EventType
    message: Optional[str] = None
    text: Optional[str] = None
    images: Optional[List[str]] = None

    @classmethod
    def status(cls, message: str) -> "StreamEvent":
        return cls(EventType.STATUS, message=message)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(EventType.ERROR, message=message)

    @classmethod
    def chunk(cls, variant: OutputVariant, text: str) -> "StreamEvent":
        return cls(_CHUNK_TYPES[variant], text=text)

    @classmethod
    def stream_done(cls, variant: OutputVariant) -> "StreamEvent":
        return cls(_DONE_TYPES[variant])

    @classmethod
    def full_content(cls, text: str) -> "StreamEvent":
        return cls(EventType.CONTENT, text=text)

    @classmethod
    def full_breadtext(cls, text: str) -> "StreamEvent":
        return cls(EventType.BREADTEXT, text=text)

    @classmethod
    def image_set(cls, images: List[str]) -> "StreamEvent":
        return cls(EventType.IMAGES, images=list(images))

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(EventType.DONE)

    @property
    def is_terminal(self) -> bool:
        return self.type == EventType.DONE

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type.value}
        for name in _PAYLOAD_FIELDS[self.type]:
            value = getattr(self, name)
            if name == "images":
                value = list(value or [])
            elif value is None:
                value = ""
            payload[name] = value
        return payload
