"""
Pydantic models for API request/response validation.
"""

from datetime import datetime
from typing import Any, Optional, List, Dict
from pydantic import BaseModel, Field, ConfigDict


def ok(data: Any = None) -> Dict:
    """Build a success envelope."""
    return {"success": True, "data": data}


def fail(error: str) -> Dict:
    """Build an error envelope."""
    return {"success": False, "error": error}


class CheckinResponse(BaseModel):
    """A player's check-in row."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    instance_id: int
    user_id: int
    is_active: bool
    checked_in_at: datetime
    checked_out_at: Optional[datetime] = None


class PartnershipRequestCreate(BaseModel):
    """Request body for asking another player to partner up."""

    requested_id: int


class PartnershipRequestAction(BaseModel):
    """Request body for accepting, rejecting or cancelling a partnership request."""

    request_id: int


class RemovePartnershipRequest(BaseModel):
    """Request body for dissolving a partnership."""

    partnership_id: int


class PartnershipResponse(BaseModel):
    """A confirmed partnership."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    instance_id: int
    player1_id: int
    player2_id: int
    is_active: bool


class PartnershipRequestResponse(BaseModel):
    """A partnership request."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    instance_id: int
    requester_id: int
    requested_id: int
    status: str


class SubmitScoreRequest(BaseModel):
    """Request body for submitting a game score."""

    match_id: int
    team1_score: int = Field(ge=0)
    team2_score: int = Field(ge=0)


class DisputeScoreRequest(BaseModel):
    """Request body for disputing a pending score."""

    reason: Optional[str] = Field(default=None, max_length=500)


class MatchScoreResponse(BaseModel):
    """A submitted game score."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    match_id: int
    team1_score: int
    team2_score: int
    submitted_by_team: int
    status: str
    dispute_reason: Optional[str] = None


class UpdateCourtsRequest(BaseModel):
    """Request body for replacing a night's court labels."""

    court_labels: List[str] = Field(min_length=1)


class ToggleAutoAssignmentRequest(BaseModel):
    """Request body for turning auto-assignment on or off."""

    enabled: bool


class PushSubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionInfo(BaseModel):
    """Browser PushSubscription JSON."""

    endpoint: str
    keys: PushSubscriptionKeys


class PushSubscribeRequest(BaseModel):
    """Request body for registering a device for push notifications."""

    model_config = ConfigDict(populate_by_name=True)
    subscription: PushSubscriptionInfo
    device_info: Optional[Dict[str, Any]] = Field(default=None, alias="deviceInfo")


class PushUnsubscribeRequest(BaseModel):
    """Request body for unregistering a device."""

    endpoint: str


class PushSubscriptionResponse(BaseModel):
    """A registered push device."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    endpoint: str
    device_info: Optional[Dict[str, Any]] = None
    is_active: bool
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
