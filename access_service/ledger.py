# ============================================================
# ledger.py - Registre des holds (HoldLedger)
# ------------------------------------------------------------
# Seule porte d'entrée pour créer, prolonger, révoquer et
# expirer un hold. Deux courses à fermer :
#
#   1. exclusivité : un seul hold vivant par ressource.
#      L'insert du HoldSlot (clé primaire = resource_id) dans la
#      même transaction que le hold fait échouer le second.
#
#   2. sweep vs extend : le sweep sélectionne des holds échus,
#      puis les expire un par un avec un UPDATE qui revérifie
#      "statut vivant ET expires_at <= now" au moment du commit.
#      Un hold prolongé entre-temps n'est donc jamais expiré.
# ============================================================
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from .db import transaction
from .errors import InvalidStateError, NotFoundError, ResourceBusyError, ValidationError
from .models import EXPIRED, REVOKED, Hold, as_utc, utcnow
from .repository import AccessRequestRepository, HoldRepository
from . import notices

log = logging.getLogger(__name__)

CAS_RETRIES = 5


class HoldLedger:
    def __init__(self, engine, codec, dispatcher, directory, publisher, channels=("push",),
                 max_extension_min: int = 240):
        self.engine = engine
        self.codec = codec
        self.dispatcher = dispatcher
        self.directory = directory
        self.publisher = publisher
        self.channels = list(channels)
        self.max_extension_min = max_extension_min

    # ------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------
    def get(self, hold_id: int) -> Hold:
        with Session(self.engine) as s:
            h = HoldRepository(s).get(hold_id)
        if h is None:
            raise NotFoundError(f"hold {hold_id} not found")
        return h

    def is_live(self, hold_id) -> bool:
        if hold_id is None:
            return False
        with Session(self.engine) as s:
            h = HoldRepository(s).get(int(hold_id))
        return h is not None and h.is_live

    def active_for(self, resource_id: str) -> Optional[Hold]:
        with Session(self.engine) as s:
            return HoldRepository(s).live_for(resource_id)

    # ------------------------------------------------------------
    # create - hold + slot + jeton, dans une seule transaction.
    # `session` permet à l'appelant (la machine d'états) d'inclure
    # la création dans sa propre transaction.
    # ------------------------------------------------------------
    def create(self, request_id: int, resource_id: str, user_id: str, site_id: str,
               ttl: timedelta, permissions=(), now: Optional[datetime] = None,
               session: Optional[Session] = None) -> Hold:
        if ttl <= timedelta(0):
            raise ValidationError("ttl must be positive")
        if session is None:
            with transaction(self.engine) as s:
                return self._create(s, request_id, resource_id, user_id, site_id, ttl, permissions, now)
        return self._create(session, request_id, resource_id, user_id, site_id, ttl, permissions, now)

    def _create(self, s, request_id, resource_id, user_id, site_id, ttl, permissions, now) -> Hold:
        now = as_utc(now) or utcnow()
        repo = HoldRepository(s)
        h = Hold(request_id=request_id, resource_id=resource_id, user_id=user_id,
                 site_id=site_id, expires_at=now + ttl)
        try:
            repo.create(h)
        except IntegrityError as e:
            raise ResourceBusyError(f"resource {resource_id} already held") from e
        h.token = self.codec.issue({
            "userId": user_id, "doorId": resource_id, "siteId": site_id,
            "permissions": list(permissions), "holdId": h.id,
            "issuedAt": now, "expiresAt": h.expires_at,
        })
        s.flush()
        log.info("[ledger] hold %s created on %s until %s", h.id, resource_id, h.expires_at,
                 extra={"hold_id": h.id, "request_id": request_id})
        return h

    # ------------------------------------------------------------
    # extend - compare-and-swap sur la version, ré-émission du jeton
    # ------------------------------------------------------------
    def extend(self, hold_id: int, extension_minutes: int, now: Optional[datetime] = None) -> dict:
        if not isinstance(extension_minutes, int) or extension_minutes <= 0:
            raise ValidationError("extension must be a positive number of minutes")
        if extension_minutes > self.max_extension_min:
            raise ValidationError(f"extension limited to {self.max_extension_min} minutes")
        now = as_utc(now) or utcnow()

        for _ in range(CAS_RETRIES):
            with transaction(self.engine) as s:
                repo = HoldRepository(s)
                h = repo.get(hold_id)
                if h is None:
                    raise NotFoundError(f"hold {hold_id} not found")
                if not h.is_live:
                    raise InvalidStateError(f"hold {hold_id} is {h.status}")
                if h.expires_at <= now:
                    raise InvalidStateError(f"hold {hold_id} already past its expiry")
                new_expires_at = h.expires_at + timedelta(minutes=extension_minutes)
                if not repo.extend(h, new_expires_at, extension_minutes):
                    continue
                h = repo.get(hold_id)
                permissions = self._permissions_of(s, h)
                token = self.codec.issue({
                    "userId": h.user_id, "doorId": h.resource_id, "siteId": h.site_id,
                    "permissions": permissions, "holdId": h.id,
                    "issuedAt": now, "expiresAt": new_expires_at,
                })
                repo.set_token(h.id, token)
                h.token = token
            break
        else:
            raise InvalidStateError(f"hold {hold_id} changed concurrently, retry")

        log.info("[ledger] hold %s extended by %s min until %s", hold_id, extension_minutes, new_expires_at,
                 extra={"hold_id": hold_id})
        self.dispatcher.notify(notices.hold_extended(h, extension_minutes, self.directory.site_staff(h.site_id),
                                                     self.channels))
        self.publisher.publish("HoldExtended", {"holdId": h.id, "expiresAt": new_expires_at.isoformat(),
                                                "extensionCount": h.extension_count})
        return {"success": True, "newExpiresAt": new_expires_at, "token": token}

    @staticmethod
    def _permissions_of(s, h: Hold) -> List[str]:
        r = AccessRequestRepository(s).get(h.request_id)
        return list(r.permissions) if r else []

    # ------------------------------------------------------------
    # revoke - retrait manuel immédiat, quelle que soit l'échéance
    # ------------------------------------------------------------
    def revoke(self, hold_id: int, reason: str = "manual") -> Hold:
        with transaction(self.engine) as s:
            repo = HoldRepository(s)
            h = repo.get(hold_id)
            if h is None:
                raise NotFoundError(f"hold {hold_id} not found")
            if not repo.end(hold_id, REVOKED, reason):
                raise InvalidStateError(f"hold {hold_id} is {h.status}")
            AccessRequestRepository(s).close(h.request_id, REVOKED)
            h = repo.get(hold_id)

        log.info("[ledger] hold %s revoked (%s)", hold_id, reason, extra={"hold_id": hold_id})
        self.dispatcher.notify(notices.hold_revoked(h, self.directory.site_staff(h.site_id), self.channels))
        self.publisher.publish("HoldRevoked", {"holdId": h.id, "requestId": h.request_id, "reason": reason})
        return h

    # ------------------------------------------------------------
    # sweep_expired - sélection puis commit conditionnel, hold par hold.
    # Le hold et sa demande passent à "expired" dans la même
    # transaction. Un hold en échec reste vivant : le sweep suivant
    # le reprend. `stop` (threading.Event) interrompt entre deux
    # holds, jamais au milieu d'une transition.
    # ------------------------------------------------------------
    def sweep_expired(self, now: datetime, stop=None) -> List[Hold]:
        now = as_utc(now)
        with Session(self.engine) as s:
            candidates = HoldRepository(s).due(now)
        expired = []
        for i, c in enumerate(candidates):
            if stop is not None and stop.is_set():
                log.info("[ledger] sweep interrupted, %d holds left", len(candidates) - i)
                break
            h = None
            try:
                with transaction(self.engine) as s:
                    repo = HoldRepository(s)
                    if repo.end(c.id, EXPIRED, "expired", due_at=now):
                        AccessRequestRepository(s).close(c.request_id, EXPIRED)
                        h = repo.get(c.id)
            except Exception:
                log.exception("[ledger] expiring hold %s failed, left for next sweep", c.id,
                              extra={"hold_id": c.id})
                continue
            if h is None:
                log.info("[ledger] hold %s changed since selection, not expired", c.id,
                         extra={"hold_id": c.id})
                continue
            expired.append(h)
        return expired

    # Holds qui arrivent à échéance dans `window` : active/extended → expiring
    def mark_expiring(self, now: datetime, window: timedelta, stop=None) -> List[Hold]:
        now = as_utc(now)
        until = now + window
        with Session(self.engine) as s:
            candidates = HoldRepository(s).nearly_due(now, until)
        marked = []
        for c in candidates:
            if stop is not None and stop.is_set():
                break
            with transaction(self.engine) as s:
                repo = HoldRepository(s)
                if repo.mark_expiring(c.id, until):
                    marked.append(repo.get(c.id))
        return marked
