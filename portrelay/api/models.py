# portrelay/api/models.py

from pydantic import BaseModel, Field
from typing import Dict, List, Optional

from portrelay.core.models import ChangeKind, ChangeStatus, ErrorKind, PortConflict

# --- Request Models ---

class AddForwardRequest(BaseModel):
    """Request model for creating a forwarding rule."""
    target_port: int = Field(..., ge=1, le=65535, description="Port of the service on the target host.")
    relay_port: Optional[int] = Field(None, ge=1, le=65535, description="Port on the relay host. Defaults to target_port.")
    auto_assign: bool = Field(False, description="Pick a free relay port if the requested one is taken.")

class RangeRequest(BaseModel):
    start: int = Field(..., ge=1, le=65535)
    end: int = Field(..., ge=1, le=65535)

class ModifyForwardRequest(BaseModel):
    """Request model for changing an existing rule. Unset fields keep their current value."""
    new_target_port: Optional[int] = Field(None, ge=1, le=65535)
    new_relay_port: Optional[int] = Field(None, ge=1, le=65535)
    force: bool = Field(False, description="Change the relay port even if the new one is in use.")

class ChangeModel(BaseModel):
    """A proposed change, as returned by the proposal endpoints and sent back to apply it."""
    kind: ChangeKind
    relay_port: int = Field(..., ge=1, le=65535)
    target_port: int = Field(..., ge=1, le=65535)
    target_host: str
    new_relay_port: Optional[int] = Field(None, ge=1, le=65535)
    new_target_port: Optional[int] = Field(None, ge=1, le=65535)
    force: bool = False
    auto_assigned: bool = False
    requested_relay_port: Optional[int] = None
    summary: str = ""

class ApplyChangeRequest(BaseModel):
    change: ChangeModel
    confirmed: bool = Field(..., description="False cancels the change without touching any rule.")

# --- Response Models ---

class ForwardRuleModel(BaseModel):
    relay_port: int
    target_host: str
    target_port: int

class ChangeResultResponse(BaseModel):
    status: ChangeStatus
    ok: bool
    error: Optional[ErrorKind] = None
    message: str
    completed_steps: List[str]
    compensated: bool
    warnings: List[str]
    change: Optional[ChangeModel] = None

class RangeResponse(BaseModel):
    succeeded: List[int]
    failed: Dict[int, str]
    requested: int

class ForwardEntryModel(BaseModel):
    relay_port: int
    target_port: int
    listening: bool

class ForwardListResponse(BaseModel):
    entries: List[ForwardEntryModel]
    total: int
    remaining: int

class PortUsageModel(BaseModel):
    listeners: List[str]
    rules: List[str]

class PortResponse(BaseModel):
    """Availability and usage of a single port."""
    port: int
    conflict: PortConflict
    rule: Optional[ForwardRuleModel] = None
    usage: PortUsageModel

class FreePortResponse(BaseModel):
    port: int

class StatusResponse(BaseModel):
    target_host: str
    ip_forward_enabled: bool
    rule_count: int
    well_known_ports: Dict[int, PortConflict]
    recent_rules: List[ForwardRuleModel]

class CleanupResponse(BaseModel):
    redirect_count: int
    accept_count: int
    duplicates: Dict[int, List[ForwardRuleModel]]
