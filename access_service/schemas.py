# ============================================================
# schemas.py - Objets échangés (hors tables)
# ------------------------------------------------------------
# Modèles SQLModel sans table : validation des corps de requête
# REST et des événements de notification.
# ============================================================
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import field_validator, model_validator
from sqlmodel import SQLModel, Field

PUSH, EMAIL, SMS = "push", "email", "sms"
CHANNELS = (PUSH, EMAIL, SMS)

NOTIFICATION_KINDS = (
    "requested", "granted", "denied", "expiring-soon", "expired", "revoked", "extended", "custom",
)


# ------------------------------------------------------------
# Cible logique d'une notification. Une seule forme à la fois :
#   user_id | user_ids | site_id | role  (role + site_id = rôle
#   restreint à un site, ex. les managers du site)
# ------------------------------------------------------------
class NotificationTarget(SQLModel):
    user_id: Optional[str] = None
    user_ids: Optional[List[str]] = None
    site_id: Optional[str] = None
    role: Optional[str] = None

    @model_validator(mode="after")
    def exactly_one_form(self):
        forms = [self.user_id is not None, self.user_ids is not None, self.site_id is not None or self.role is not None]
        if sum(forms) != 1:
            raise ValueError("target needs exactly one of user_id, user_ids, site_id/role")
        return self


class NotificationPayload(SQLModel):
    title: str = Field(min_length=1)
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)


class NotificationEvent(SQLModel):
    event_id: str = Field(min_length=1)
    kind: str
    target: NotificationTarget
    payload: NotificationPayload
    channels: List[str] = Field(default_factory=lambda: [PUSH])

    @field_validator("kind")
    @classmethod
    def known_kind(cls, v: str) -> str:
        if v not in NOTIFICATION_KINDS:
            raise ValueError(f"unknown notification kind {v!r}")
        return v

    @field_validator("channels")
    @classmethod
    def known_channels(cls, v: List[str]) -> List[str]:
        unknown = [c for c in v if c not in CHANNELS]
        if unknown or not v:
            raise ValueError(f"invalid channels {v!r}")
        return v


# ------------------------------------------------------------
# Corps des requêtes REST
# ------------------------------------------------------------
class SubmitRequest(SQLModel):
    user_id: str
    door_id: str
    site_id: str
    permissions: List[str]


class DecisionRequest(SQLModel):
    outcome: str                      # grant | deny
    reason: Optional[str] = None
    ttl_minutes: Optional[int] = None


class ValidateRequest(SQLModel):
    token: str


class ExtendRequest(SQLModel):
    minutes: int


class RevokeRequest(SQLModel):
    reason: str = "manual"


class SweepRequest(SQLModel):
    now: Optional[datetime] = None
