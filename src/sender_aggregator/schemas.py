# In src/sender_aggregator/schemas.py

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .security import sanitize_owner_id
from .exceptions import ValidationError as CustomValidationError


# --- Invocation Event ---


class ScanAction(str, Enum):
    SCAN = "scan"
    START = "start"
    STATUS = "status"
    RESET = "reset"


class ScanEvent(BaseModel):
    """
    Pydantic model for the scheduled (or manual) invocation event.
    """

    owner_id: str = Field(..., min_length=1)
    action: ScanAction = ScanAction.SCAN

    @field_validator("owner_id")
    @classmethod
    def validate_owner_id(cls, value: str) -> str:
        try:
            return sanitize_owner_id(value)
        except CustomValidationError as e:
            raise ValueError(str(e))


# --- Gmail Message Resource (format=metadata) ---


class GmailHeader(BaseModel):
    name: str
    value: str = ""


class GmailPayload(BaseModel):
    headers: list[GmailHeader] = Field(default_factory=list)


class GmailMessage(BaseModel):
    """
    Runtime validation of one message from a Gmail thread resource.
    Only the fields the normalizer reads are declared.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    thread_id: str | None = Field(None, alias="threadId")
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")
    internal_date: int | None = Field(None, alias="internalDate")
    payload: GmailPayload = Field(default_factory=GmailPayload)

    def header(self, name: str) -> str:
        """Returns the first header value matching *name* case-insensitively."""
        wanted = name.lower()
        for header in self.payload.headers:
            if header.name.lower() == wanted:
                return header.value
        return ""


# --- Persistent Store ---


class PendingMerge(BaseModel):
    """
    The contribution a checkpoint made to a record. It is settled once the
    resumption cursor reaches ``through_cursor`` within the same scan.
    """

    scan_id: str
    through_cursor: int = Field(..., ge=0)
    count: int = Field(..., ge=0)


class StoreRecord(BaseModel):
    """One row of the sender report; one per distinct sender ever seen."""

    row: int = Field(..., ge=1)
    act_flag: bool = False
    address: str
    name: str = ""
    count: int = Field(0, ge=0)
    sample_subject: str = ""
    last_seen: str = ""
    unsubscribe_url: str = ""
    unsubscribe_mailto: str = ""
    notes: str = ""
    processed_at: str = ""
    pending: PendingMerge | None = None


class ResumptionState(BaseModel):
    cursor: int = Field(0, ge=0)
    total_processed: int = Field(0, ge=0)
    initialized: bool = False
    scan_id: str | None = None


class ScanCompletion(BaseModel):
    """
    Marks the owner's last scan as finished. While it exists, scheduled
    scans are no-ops; only an explicit start or a reset removes it.
    """

    scan_id: str
    cursor: int = Field(0, ge=0)
    total_processed: int = Field(0, ge=0)
    completed_at: str = ""


# --- Reporting ---


class CycleSummary(BaseModel):
    """The per-cycle report returned to the caller."""

    done: bool
    records_processed: int
    messages_absorbed: int = 0
    cursor: int
    total_processed: int
    checkpoints: int = 0
    inserted: int = 0
    updated: int = 0
    stopped_reason: str
    elapsed_ms: int = 0


class ScanStatus(BaseModel):
    status: str
    cursor: int = 0
    total_processed: int = 0
    sender_count: int = 0
    total_emails: int = 0
    has_more: bool = False
    completed_at: str | None = None
