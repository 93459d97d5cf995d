"""
Log data model.

A LogEntry is the atomic unit of evidence. Its payload is a tagged union
keyed by category so detectors can pattern-match on shape:

    CONSOLE      -> ConsolePayload      (intercepted diagnostic call)
    UI           -> UIPayload           (highlighted regions, visual events)
    STATE        -> StatePayload        (state transitions, anomalies)
    EVENT        -> EventPayload        (host/plugin events)
    API          -> ApiPayload          (capability polls and hooked calls)
    ERROR        -> ErrorPayload        (errors and detected patterns)
    PERFORMANCE  -> PerformancePayload  (timed operations)
    REPORT       -> ReportPayload       (report generation)

Entries are frozen once constructed. Ordering is write order, carried in
the per-logger sequence number.
"""

import json
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LogLevel(str, Enum):
    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogCategory(str, Enum):
    CONSOLE = "CONSOLE"
    UI = "UI"
    STATE = "STATE"
    EVENT = "EVENT"
    API = "API"
    ERROR = "ERROR"
    PERFORMANCE = "PERFORMANCE"
    REPORT = "REPORT"


# =============================================================================
# State snapshots
# =============================================================================

HighlightKey = Tuple[int, int, str]


class Highlight(BaseModel):
    """One highlighted region as rendered by the host."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = ""
    type: str = ""
    start: int
    end: int
    text: str = ""

    @property
    def key(self) -> HighlightKey:
        return (self.start, self.end, self.text)


class DocumentMetrics(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    content_length: int = 0
    line_count: int = 0
    word_count: int = 0
    scroll_height: float = 0.0


class StateSnapshot(BaseModel):
    """
    Point-in-time reading of observable application state.

    Pure data: building a snapshot never touches the host beyond reading.
    read_errors lists the fields that fell back to neutral values.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    timestamp: float
    change_type: str
    correlation_id: Optional[str] = None
    panel_visible: bool = False
    indicator_active: bool = False
    highlights: List[Highlight] = Field(default_factory=list)
    metrics: DocumentMetrics = Field(default_factory=DocumentMetrics)
    read_errors: List[str] = Field(default_factory=list)

    @property
    def highlight_count(self) -> int:
        return len(self.highlights)


# =============================================================================
# Category payloads
# =============================================================================

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    details: Dict[str, Any] = Field(default_factory=dict)

    def text(self) -> str:
        """Lower-cased textual form used for keyword matching."""
        return json.dumps(self.model_dump(mode="json"), default=str).lower()


class ConsolePayload(_Payload):
    category: Literal["CONSOLE"] = "CONSOLE"
    method: str = "log"
    message: str = ""
    args: List[Any] = Field(default_factory=list)
    stack: Optional[List[str]] = None

    def text(self) -> str:
        return self.message.lower()


class UIPayload(_Payload):
    category: Literal["UI"] = "UI"
    highlights: List[Highlight] = Field(default_factory=list)


class StatePayload(_Payload):
    category: Literal["STATE"] = "STATE"


class EventPayload(_Payload):
    category: Literal["EVENT"] = "EVENT"


class ApiPayload(_Payload):
    category: Literal["API"] = "API"
    capability: Optional[str] = None
    operation: Optional[str] = None


class ErrorPayload(_Payload):
    category: Literal["ERROR"] = "ERROR"
    message: str = ""
    error_type: Optional[str] = None
    stack: Optional[List[str]] = None


class PerformancePayload(_Payload):
    category: Literal["PERFORMANCE"] = "PERFORMANCE"
    operation: str = ""
    duration_ms: float = 0.0
    threshold_ms: Optional[float] = None


class ReportPayload(_Payload):
    category: Literal["REPORT"] = "REPORT"


Payload = Annotated[
    Union[
        ConsolePayload,
        UIPayload,
        StatePayload,
        EventPayload,
        ApiPayload,
        ErrorPayload,
        PerformancePayload,
        ReportPayload,
    ],
    Field(discriminator="category"),
]

PAYLOAD_TYPES = {
    LogCategory.CONSOLE: ConsolePayload,
    LogCategory.UI: UIPayload,
    LogCategory.STATE: StatePayload,
    LogCategory.EVENT: EventPayload,
    LogCategory.API: ApiPayload,
    LogCategory.ERROR: ErrorPayload,
    LogCategory.PERFORMANCE: PerformancePayload,
    LogCategory.REPORT: ReportPayload,
}


def build_payload(category: LogCategory, data: Any = None) -> _Payload:
    """
    Coerce loose data into the payload shape for a category.

    Keys the payload model declares are lifted into fields; everything
    else lands in details. Non-mapping data is stored as details["value"].
    """
    payload_cls = PAYLOAD_TYPES[LogCategory(category)]
    if isinstance(data, payload_cls):
        return data
    if data is None:
        return payload_cls()
    if not isinstance(data, dict):
        return payload_cls(details={"value": data})

    fields = set(payload_cls.model_fields) - {"category", "details"}
    lifted = {k: v for k, v in data.items() if k in fields}
    rest = {k: v for k, v in data.items() if k not in fields and k != "category"}
    details: Dict[str, Any] = {}
    if isinstance(data.get("details"), dict):
        details.update(data["details"])
    details.update({k: v for k, v in rest.items() if k != "details"})
    return payload_cls(details=details, **lifted)


# =============================================================================
# Log entry
# =============================================================================

class LogEntry(BaseModel):
    """
    Immutable log record.

    INVARIANT: data.category always equals category.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    sequence: int
    timestamp: float
    session_id: str
    level: LogLevel = LogLevel.INFO
    category: LogCategory = LogCategory.EVENT
    component: str
    action: str
    data: Payload
    correlation_id: Optional[str] = None
    visual_state: Optional[StateSnapshot] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_payload(cls, values: Any) -> Any:
        if isinstance(values, dict):
            category = LogCategory(values.get("category", LogCategory.EVENT))
            data = values.get("data")
            already_tagged = isinstance(data, dict) and "category" in data
            if not isinstance(data, BaseModel) and not already_tagged:
                values = dict(values)
                values["data"] = build_payload(category, data)
        return values

    @model_validator(mode="after")
    def _check_payload_category(self) -> "LogEntry":
        if self.data.category != self.category.value:
            raise ValueError(
                f"Payload category {self.data.category} does not match entry category {self.category.value}"
            )
        return self
