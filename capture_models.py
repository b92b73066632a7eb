"""
Longshot - Capture Models

Pydantic models for capture sessions, scroll geometry, status records and the
cross-context message protocol.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


class CaptureStatus(str, Enum):
    """Capture session state"""
    IDLE = "idle"
    PREPARING = "preparing"
    STABILIZING = "stabilizing"
    CAPTURING = "capturing"
    STITCHING = "stitching"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (CaptureStatus.COMPLETED, CaptureStatus.ERROR)


class TargetKind(str, Enum):
    """What a session captures"""
    FULL_PAGE = "full_page"  # Whole scroll surface (document or nested container)
    REGION = "region"  # Single element or rectangle, captured once
    SITE_CENTER = "site_center"  # Center column reported by a site handler


class WireModel(BaseModel):
    """Base for models exchanged with in-page scripts and protocol clients (camelCase on the wire)"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CaptureConfig(WireModel):
    """Persisted capture configuration record"""
    pre_capture: bool = False  # Expand collapsed content before capturing
    pre_capture_max_duration: int = Field(default=10000, ge=0, le=60000)  # ms


class CaptureRect(WireModel):
    """Rectangle in CSS pixels relative to the viewport"""
    left: float = Field(..., ge=0)
    top: float = Field(..., ge=0)
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)

    def as_clip(self) -> dict:
        """Playwright screenshot clip"""
        return {"x": self.left, "y": self.top, "width": self.width, "height": self.height}


class TargetDescriptor(WireModel):
    """Capture target: full page, element/region, or site-specific center"""
    kind: TargetKind = TargetKind.FULL_PAGE
    selector: Optional[str] = None
    rect: Optional[CaptureRect] = None
    site_type: Optional[str] = None


class ScrollGeometry(WireModel):
    """Scroll surface geometry reported by the viewport driver"""
    scroll_height: float = Field(..., ge=0)
    client_height: float = Field(..., ge=0)
    scroll_top: float = Field(0, ge=0)
    container: str = "document"  # "document" or a selector for a nested scroller
    rect: CaptureRect
    device_pixel_ratio: float = Field(1.0, gt=0)

    @property
    def max_scroll_top(self) -> float:
        return max(0.0, self.scroll_height - self.client_height)

    @property
    def is_scrollable(self) -> bool:
        return self.scroll_height > self.client_height


class ScrollContainerInfo(WireModel):
    """Scroll container located by a site handler"""
    selector: str
    type: str
    scroll_height: float
    client_height: float


class CenterBounds(WireModel):
    """Center content column reported by a site handler"""
    left: float
    right: float
    top: float
    width: float
    scroll_height: float
    client_height: float


class SiteDetection(WireModel):
    """Result of site-family detection"""
    detected: bool = False
    site_type: Optional[str] = None  # Handler name, e.g. "Jira"
    detection_type: Optional[str] = None  # Handler-specific variant, e.g. "jira-cloud"


@dataclass
class ViewportFrame:
    """One encoded snapshot of the visible region, taken at `offset` (CSS px)"""
    data: bytes
    offset: float
    index: int = 0

    def release(self):
        self.data = b""


class CaptureSession(BaseModel):
    """One end-to-end capture request; mutated only by the orchestrator"""
    session_id: str
    tab_id: str
    status: CaptureStatus = CaptureStatus.IDLE
    target: TargetDescriptor = Field(default_factory=TargetDescriptor)
    config: CaptureConfig = Field(default_factory=CaptureConfig)
    output_height: int = 0  # Raster rows in the composite
    frame_count: int = 0
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    truncated: bool = False
    missing_rows: int = 0  # Rows skipped by scroll jumps larger than a frame
    output_path: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def touch(self):
        self.updated_at = datetime.now()

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.now()) - self.updated_at).total_seconds()


class StatusRecord(BaseModel):
    """Status snapshot kept in the session state store"""
    session_id: str
    tab_id: str
    status: CaptureStatus
    message: str = ""
    progress: int = 0
    timestamp: float  # epoch seconds of last update
    truncated: bool = False
    missing_rows: int = 0
    output_path: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def from_session(cls, session: CaptureSession) -> "StatusRecord":
        return cls(
            session_id=session.session_id,
            tab_id=session.tab_id,
            status=session.status,
            message=session.message,
            progress=session.progress,
            timestamp=session.updated_at.timestamp(),
            truncated=session.truncated,
            missing_rows=session.missing_rows,
            output_path=session.output_path,
            error_code=session.error_code,
        )

    def to_wire(self) -> dict:
        return {
            "sessionId": self.session_id,
            "status": self.status.value,
            "message": self.message,
            "progress": self.progress,
            "timestamp": int(self.timestamp * 1000),
            "truncated": self.truncated,
            "missingRows": self.missing_rows,
            "outputPath": self.output_path,
            "errorCode": self.error_code,
        }


# =============================================================================
# MESSAGE PROTOCOL
# =============================================================================

class StartCaptureMessage(WireModel):
    type: Literal["START_CAPTURE"]
    config: Optional[CaptureConfig] = None


class StartRegionCaptureMessage(WireModel):
    type: Literal["START_REGION_CAPTURE"]
    selector: Optional[str] = Field(None, min_length=1)
    rect: Optional[CaptureRect] = None

    @model_validator(mode="after")
    def _require_target(self):
        if self.selector is None and self.rect is None:
            raise ValueError("region capture needs a selector or a rect")
        return self


class StartSiteCenterCaptureMessage(WireModel):
    type: Literal["START_SITE_CENTER_CAPTURE"]


class CancelCaptureMessage(WireModel):
    type: Literal["CANCEL_CAPTURE"]
    session_id: str = Field(..., min_length=1)


class GetCaptureStatusMessage(WireModel):
    type: Literal["GET_CAPTURE_STATUS"]
    session_id: Optional[str] = None


class GetConfigMessage(WireModel):
    type: Literal["GET_CONFIG"]


class SetConfigMessage(WireModel):
    type: Literal["SET_CONFIG"]
    config: CaptureConfig


class DetectSiteTypeMessage(WireModel):
    type: Literal["DETECT_SITE_TYPE"]


InboundMessage = Annotated[
    Union[
        StartCaptureMessage,
        StartRegionCaptureMessage,
        StartSiteCenterCaptureMessage,
        CancelCaptureMessage,
        GetCaptureStatusMessage,
        GetConfigMessage,
        SetConfigMessage,
        DetectSiteTypeMessage,
    ],
    Field(discriminator="type"),
]

inbound_message_adapter = TypeAdapter(InboundMessage)
