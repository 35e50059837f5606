"""
Request and response models for the element store API.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..core.config import ELEMENT_TYPES


def _check_element_type(v):
    if v not in ELEMENT_TYPES:
        raise ValueError(f'element_type must be one of: {ELEMENT_TYPES}')
    return v


def _check_not_empty(v, name):
    if not v or not v.strip():
        raise ValueError(f'{name} cannot be empty')
    return v


class LoginRequest(BaseModel):
    username: str
    password: str

    @field_validator('username')
    @classmethod
    def username_must_not_be_empty(cls, v):
        return _check_not_empty(v, 'username')


class SessionResponse(BaseModel):
    token: Optional[str] = None
    user_id: str
    username: str
    role: str
    expires_at: Optional[datetime] = None


class UpsertRequest(BaseModel):
    element_type: str
    element_id: str
    value: Any
    metadata: Dict[str, Any] = {}

    @field_validator('element_type')
    @classmethod
    def element_type_must_be_valid(cls, v):
        return _check_element_type(v)

    @field_validator('element_id')
    @classmethod
    def element_id_must_not_be_empty(cls, v):
        return _check_not_empty(v, 'element_id')

    @field_validator('value')
    @classmethod
    def value_must_not_be_null(cls, v):
        if v is None:
            raise ValueError('value cannot be null')
        return v


class BulkUpsertRequest(BaseModel):
    # Items are validated one by one server-side so a bad item fails alone
    updates: List[Dict[str, Any]]


class ElementResponse(BaseModel):
    id: Optional[int] = None
    owner_id: str
    element_type: str
    element_id: str
    value: Any
    metadata: Dict[str, Any] = {}
    version: int
    is_active: bool
    updated_at: datetime


class UpsertResponse(BaseModel):
    element: ElementResponse
    previous_value: Any = None


class BulkItemError(BaseModel):
    element_type: str
    element_id: str
    message: str


class BulkUpsertResponse(BaseModel):
    saved_count: int
    errors: List[BulkItemError]


class ElementListResponse(BaseModel):
    elements: List[ElementResponse]


class DeleteResponse(BaseModel):
    success: bool


class BackupResponse(BaseModel):
    id: int
    original_id: int
    element_type: str
    element_id: str
    value: Any
    backup_reason: str
    created_at: datetime


class BackupListResponse(BaseModel):
    backups: List[BackupResponse]


class AuditEntryResponse(BaseModel):
    id: int
    table_name: str
    record_id: int
    action: str
    old_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    changed_fields: List[str]
    created_at: datetime


class AuditListResponse(BaseModel):
    entries: List[AuditEntryResponse]


class ShareCreateRequest(BaseModel):
    target_type: str
    target_id: str
    expires_in_days: Optional[int] = None
    permissions: List[str] = ["read"]
    password: Optional[str] = None

    @field_validator('target_type')
    @classmethod
    def target_type_must_be_valid(cls, v):
        return _check_element_type(v)

    @field_validator('target_id')
    @classmethod
    def target_id_must_not_be_empty(cls, v):
        return _check_not_empty(v, 'target_id')

    @field_validator('expires_in_days')
    @classmethod
    def expiry_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('expires_in_days must be positive')
        return v


class ShareResponse(BaseModel):
    share_id: str
    target_type: str
    target_id: str
    permissions: List[str]
    expires_at: datetime
    is_active: bool
    access_count: int
    last_accessed_at: Optional[datetime] = None
    requires_password: bool
    created_at: Optional[datetime] = None
    url: Optional[str] = None


class ShareListResponse(BaseModel):
    shares: List[ShareResponse]


class ShareValidationResponse(BaseModel):
    share_id: str
    valid: bool


class SharedContentResponse(BaseModel):
    share: ShareResponse
    value: Any = None
    updated_at: Optional[datetime] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    element_count: int


class ErrorResponse(BaseModel):
    error_type: str
    message: str
    errors: List[str] = []
