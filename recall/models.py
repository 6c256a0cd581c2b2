"""Shared data model for the capture pipeline.

Defines the records that flow between the capture stream, the scheduler,
the OCR stage and the event store:

- RawFrame: an in-memory frame handed from the stream to the scheduler
- CaptureEvent: the persisted, immutable record of one capture tick
- ExclusionRuleSet: privacy rules consulted before any persistence
- ForegroundApp: identity of the focused application at tick time
- StatusEvent: lifecycle notifications emitted by the scheduler
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, FrozenSet, Iterable, NamedTuple, Optional

MIN_INTERVAL_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 300.0
DEFAULT_INTERVAL_SECONDS = 10.0


def clamp_interval(seconds: float) -> float:
    """Bound a sampling interval to [1, 300] seconds."""
    return max(MIN_INTERVAL_SECONDS, min(MAX_INTERVAL_SECONDS, float(seconds)))


class CaptureState(enum.Enum):
    """Lifecycle states of the capture scheduler."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAULTED = "faulted"


class Decision(enum.Enum):
    """Outcome of the exclusion gate."""
    ALLOW = "allow"
    EXCLUDE = "exclude"


class OcrMode(enum.Enum):
    """Recognition modes supported by the OCR extractor."""
    FAST = "fast"
    ACCURATE = "accurate"

    @classmethod
    def parse(cls, value: Any) -> "OcrMode":
        """Parse a config value, defaulting to ACCURATE for anything unknown."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value.strip().lower() == "fast":
            return cls.FAST
        return cls.ACCURATE


@dataclass(frozen=True)
class RawFrame:
    """A captured bitmap (PIL image) and the instant it was captured."""
    image: Any
    captured_at: datetime


class ForegroundApp(NamedTuple):
    """Identity of the foreground application as (name, bundle_id, window_title).

    Every field is optional: the platform may be unable to report any of them.
    """
    name: Optional[str] = None
    bundle_id: Optional[str] = None
    window_title: Optional[str] = None


@dataclass(frozen=True)
class ExclusionRuleSet:
    """Privacy rules, read-only to the pipeline.

    Attributes:
        excluded_bundle_ids: Application identifiers that are never captured
        excluded_title_keywords: Window title fragments (case-insensitive)
        ignore_incognito: Treat private/incognito browser windows as excluded
    """
    excluded_bundle_ids: FrozenSet[str] = frozenset()
    excluded_title_keywords: FrozenSet[str] = frozenset()
    ignore_incognito: bool = False

    @classmethod
    def from_lists(
        cls,
        bundle_ids: Optional[Iterable[str]] = None,
        title_keywords: Optional[Iterable[str]] = None,
        ignore_incognito: bool = False,
    ) -> "ExclusionRuleSet":
        """Build a rule set; a bare string counts as a one-item list."""
        return cls(
            excluded_bundle_ids=_string_set(bundle_ids),
            excluded_title_keywords=_string_set(title_keywords),
            ignore_incognito=bool(ignore_incognito),
        )


def _string_set(values) -> FrozenSet[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(str(v) for v in values if v is not None)


@dataclass(frozen=True)
class CaptureEvent:
    """One persisted capture.

    ``ocr_text`` is None when extraction found nothing; it is never an empty
    string. ``screenshot_path`` is relative to the screenshots root and is None
    when the image could not be written.
    """
    id: str
    timestamp: datetime
    ocr_text: Optional[str] = None
    screenshot_path: Optional[str] = None
    application_name: Optional[str] = None
    bundle_identifier: Optional[str] = None

    @classmethod
    def create(
        cls,
        timestamp: datetime,
        ocr_text: Optional[str] = None,
        screenshot_path: Optional[str] = None,
        application_name: Optional[str] = None,
        bundle_identifier: Optional[str] = None,
    ) -> "CaptureEvent":
        """Build a new event with a freshly assigned id."""
        return cls(
            id=uuid.uuid4().hex,
            timestamp=timestamp,
            ocr_text=ocr_text or None,
            screenshot_path=screenshot_path or None,
            application_name=application_name,
            bundle_identifier=bundle_identifier,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "ocr_text": self.ocr_text,
            "screenshot_path": self.screenshot_path,
            "application_name": self.application_name,
            "bundle_identifier": self.bundle_identifier,
        }


@dataclass(frozen=True)
class StatusEvent:
    """Notification emitted by the scheduler on transitions and errors."""
    state: CaptureState
    interval_seconds: float
    error: Optional[Exception] = field(default=None, compare=False)
