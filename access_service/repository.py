# ============================================================
# repository.py - Accès aux données (requests, holds, audit)
# ------------------------------------------------------------
# Design pattern "Repository" : les couches métier ne font
# jamais de lecture-puis-écriture à la main. Chaque mutation
# passe par une mise à jour conditionnelle (UPDATE … WHERE)
# dont le rowcount dit si la transition a bien eu lieu.
# ============================================================
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, update
from sqlmodel import Session, select

from .models import (
    AccessLog, AccessRequest, Hold, HoldSlot, ACTIVE, EXPIRING, EXTENDED,
    LIVE_HOLD_STATUSES, PENDING, GRANTED, utcnow,
)


class AccessRequestRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, r: AccessRequest):
        self.session.add(r)
        self.session.flush()
        return r

    def get(self, request_id: int) -> Optional[AccessRequest]:
        return self.session.exec(
            select(AccessRequest).where(AccessRequest.id == request_id)
            .execution_options(populate_existing=True)
        ).first()

    # pending → granted/denied, seulement si personne n'a décidé avant nous
    def decide(self, request_id: int, status: str, reason: Optional[str], hold_id: Optional[int] = None) -> bool:
        res = self.session.connection().execute(
            update(AccessRequest)
            .where(AccessRequest.id == request_id, AccessRequest.status == PENDING)
            .values(status=status, reason=reason, hold_id=hold_id, decided_at=utcnow())
        )
        return res.rowcount == 1

    # granted → expired/revoked quand le hold se termine
    def close(self, request_id: int, status: str) -> bool:
        res = self.session.connection().execute(
            update(AccessRequest)
            .where(AccessRequest.id == request_id, AccessRequest.status == GRANTED)
            .values(status=status)
        )
        return res.rowcount == 1

    def log(self, entry: AccessLog):
        self.session.add(entry)


class HoldRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, hold_id: int) -> Optional[Hold]:
        return self.session.exec(
            select(Hold).where(Hold.id == hold_id)
            .execution_options(populate_existing=True)
        ).first()

    def live_for(self, resource_id: str) -> Optional[Hold]:
        return self.session.exec(
            select(Hold).where(Hold.resource_id == resource_id, Hold.status.in_(LIVE_HOLD_STATUSES))
        ).first()

    # Insère le hold puis son slot : la clé primaire du slot fait
    # échouer (IntegrityError) toute seconde réservation de la ressource
    def create(self, h: Hold) -> Hold:
        self.session.add(h)
        self.session.flush()
        self.session.add(HoldSlot(resource_id=h.resource_id, hold_id=h.id))
        self.session.flush()
        return h

    def set_token(self, hold_id: int, token: str):
        self.session.connection().execute(update(Hold).where(Hold.id == hold_id).values(token=token))

    # compare-and-swap sur la version
    def extend(self, h: Hold, new_expires_at: datetime, minutes: int) -> bool:
        res = self.session.connection().execute(
            update(Hold)
            .where(Hold.id == h.id, Hold.version == h.version, Hold.status.in_(LIVE_HOLD_STATUSES))
            .values(
                expires_at=new_expires_at,
                status=EXTENDED,
                extension_count=h.extension_count + 1,
                extension_minutes=h.extension_minutes + minutes,
                version=h.version + 1,
            )
        )
        return res.rowcount == 1

    # Termine un hold vivant (expired | revoked) et libère la ressource.
    # Si `due_at` est fourni, l'échéance est revérifiée au commit.
    def end(self, hold_id: int, status: str, reason: Optional[str] = None, due_at: Optional[datetime] = None) -> bool:
        conds = [Hold.id == hold_id, Hold.status.in_(LIVE_HOLD_STATUSES)]
        if due_at is not None:
            conds.append(Hold.expires_at <= due_at)
        res = self.session.connection().execute(
            update(Hold).where(*conds).values(
                status=status, reason=reason, ended_at=utcnow(), version=Hold.version + 1
            )
        )
        if res.rowcount != 1:
            return False
        self.session.connection().execute(delete(HoldSlot).where(HoldSlot.hold_id == hold_id))
        return True

    def due(self, now: datetime) -> List[Hold]:
        return list(self.session.exec(
            select(Hold)
            .where(Hold.status.in_(LIVE_HOLD_STATUSES), Hold.expires_at <= now)
            .order_by(Hold.expires_at)
        ).all())

    def nearly_due(self, now: datetime, until: datetime) -> List[Hold]:
        return list(self.session.exec(
            select(Hold)
            .where(Hold.status.in_((ACTIVE, EXTENDED)), Hold.expires_at > now, Hold.expires_at <= until)
            .order_by(Hold.expires_at)
        ).all())

    def mark_expiring(self, hold_id: int, until: datetime) -> bool:
        res = self.session.connection().execute(
            update(Hold)
            .where(Hold.id == hold_id, Hold.status.in_((ACTIVE, EXTENDED)), Hold.expires_at <= until)
            .values(status=EXPIRING, version=Hold.version + 1)
        )
        return res.rowcount == 1
