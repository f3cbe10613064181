# ============================================================
# models.py - Modèles de données SQLModel (Access Service)
# ------------------------------------------------------------
# Définit les tables de la base :
#   1. AccessRequest : demande d'accès à une porte / équipement
#   2. Hold : réservation accordée et bornée dans le temps
#   3. HoldSlot : verrou d'exclusivité (un hold vivant par ressource)
#   4. AccessLog : journal d'audit append-only
#   5. DeliveryRecord : journal des envois de notifications
#   6. Site / Door / User / SiteMembership : annuaire
#   7. ProcessedMessage : messages RabbitMQ déjà traités
# Toutes les dates sont en UTC avec fuseau (timezone-aware).
# ============================================================
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Une date sans fuseau est lue comme de l'UTC
def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ------------------------------------------------------------
# UTCDateTime : colonne DateTime(timezone=True) qui écrit et
# relit toujours de l'UTC avec fuseau. SQLite ne garde pas le
# fuseau : on le remet à la lecture.
# ------------------------------------------------------------
class UTCDateTime(TypeDecorator):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


# Statuts des demandes
PENDING, GRANTED, DENIED, EXPIRED, REVOKED = "pending", "granted", "denied", "expired", "revoked"

# Statuts des holds
ACTIVE, EXPIRING, EXTENDED = "active", "expiring", "extended"
LIVE_HOLD_STATUSES = (ACTIVE, EXPIRING, EXTENDED)


# ------------------------------------------------------------
# AccessRequest
# ------------------------------------------------------------
# Cycle de vie : pending → granted | denied
#                granted → expired | revoked (via le hold)
# Jamais supprimée (audit).
# ------------------------------------------------------------
class AccessRequest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    door_id: str = Field(index=True)
    site_id: str
    permissions: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = PENDING
    reason: Optional[str] = None
    hold_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    decided_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


# ------------------------------------------------------------
# Hold
# ------------------------------------------------------------
# active → expiring → extended … → expired | revoked
# `version` sert au compare-and-swap des prolongations.
# ------------------------------------------------------------
class Hold(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(index=True)
    resource_id: str = Field(index=True)
    user_id: str
    site_id: str
    status: str = Field(default=ACTIVE, index=True)
    expires_at: datetime = Field(index=True, sa_type=UTCDateTime)
    extension_count: int = 0
    extension_minutes: int = 0
    token: Optional[str] = None
    reason: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    ended_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_HOLD_STATUSES


class HoldSlot(SQLModel, table=True):
    resource_id: str = Field(primary_key=True)
    hold_id: int


class AccessLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(index=True)
    user_id: str
    door_id: str
    site_id: str
    action: str
    token: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


# ------------------------------------------------------------
# DeliveryRecord
# ------------------------------------------------------------
# Une ligne par (événement, canal, destinataire). La contrainte
# d'unicité rend l'envoi idempotent : pending | delivered | failed
# recipient = id utilisateur, address = jeton push / email / numéro
# ------------------------------------------------------------
class DeliveryRecord(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("event_id", "channel", "recipient"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(index=True)
    channel: str
    recipient: str
    address: str
    status: str = Field(default="pending", index=True)
    attempts: int = 0
    last_error: Optional[str] = None
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


# Annuaire : sites, portes/équipements, utilisateurs et rôles par site
class Site(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str = ""


class Door(SQLModel, table=True):
    id: str = Field(primary_key=True)
    site_id: str = Field(index=True)
    name: str = ""
    kind: str = "door"          # door | equipment


class User(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str = ""
    role: str = "user"          # user | admin | site_manager | emergency_responder
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None


class SiteMembership(SQLModel, table=True):
    site_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    role: str = "member"        # member | manager | responder


class ProcessedMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(index=True, unique=True)
    processed_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
