"""
Export job records and requests.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import Field, field_validator, model_validator

from ..events.schema import WireModel
from ..analytics.models import as_utc


class ExportFormat(str, Enum):
    """Supported file formats."""
    CSV = "csv"
    JSON = "json"
    PDF = "pdf"
    XLSX = "xlsx"


class ReportType(str, Enum):
    """Report kinds a client may ask for."""
    OVERVIEW = "overview"
    EVENTS = "events"
    SCREENS = "screens"
    USERS = "users"
    RETENTION = "retention"
    FUNNEL = "funnel"
    SESSIONS = "sessions"
    PERFORMANCE = "performance"
    CUSTOM = "custom"


class ExportStatus(str, Enum):
    """Job lifecycle. ``expired`` is derived from ``expires_at``, never stored."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class DateRangeModel(WireModel):
    start: datetime
    end: datetime

    @field_validator('start', 'end')
    @classmethod
    def normalize(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode='after')
    def check_order(self) -> 'DateRangeModel':
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class ExportFilters(WireModel):
    """Row filters applied by the events report."""
    event_types: Optional[List[str]] = None
    user_id: Optional[str] = None


class ExportOptions(WireModel):
    """Rendering options."""
    include_headers: bool = True
    delimiter: str = ","

    @field_validator('delimiter')
    @classmethod
    def check_delimiter(cls, v: str) -> str:
        if v not in (",", ";", "\t", "|"):
            raise ValueError("delimiter must be one of , ; tab |")
        return v


class ExportRequest(WireModel):
    """Body of a create-export call."""
    report_type: ReportType
    format: str
    date_range: DateRangeModel
    filters: Optional[ExportFilters] = None
    options: ExportOptions = Field(default_factory=ExportOptions)
    steps: Optional[List[str]] = None
    time_window_hours: float = Field(default=24, gt=0)
    retention_days: Optional[List[int]] = None


class ExportFile(WireModel):
    """Where a finished export lives."""
    key: str
    size: int
    download_url: Optional[str] = None
    expires_at: Optional[datetime] = None


class ExportRecord(WireModel):
    """Persisted state of one export job."""
    id: str
    project_id: str
    user_id: str
    report_type: ReportType
    format: ExportFormat
    status: ExportStatus = ExportStatus.PENDING
    date_range: DateRangeModel
    filters: Optional[ExportFilters] = None
    options: ExportOptions = Field(default_factory=ExportOptions)
    steps: Optional[List[str]] = None
    time_window_hours: float = 24
    retention_days: Optional[List[int]] = None
    file: Optional[ExportFile] = None
    error: Optional[str] = None
    progress: int = 0
    actual_rows: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return as_utc(self.expires_at) <= now

    def effective_status(self, now: Optional[datetime] = None) -> ExportStatus:
        """Stored status, or ``expired`` once the retention window has passed."""
        if self.is_expired(now):
            return ExportStatus.EXPIRED
        return self.status

    def view(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Wire form with the derived status applied."""
        data = self.to_wire()
        data["status"] = self.effective_status(now).value
        return data

    def status_view(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Compact polling response."""
        result: Dict[str, Any] = {
            "exportId": self.id,
            "status": self.effective_status(now).value,
            "progress": self.progress,
        }
        if self.file is not None:
            result["downloadUrl"] = self.file.download_url
            result["fileSize"] = self.file.size
            if self.file.expires_at is not None:
                result["expiresAt"] = self.file.expires_at.isoformat()
        if self.actual_rows is not None:
            result["rowCount"] = self.actual_rows
        if self.error:
            result["error"] = self.error
        return result
