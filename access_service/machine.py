# ============================================================
# machine.py - Machine d'états des demandes d'accès
# ------------------------------------------------------------
#   pending → granted | denied      (decide)
#   granted → expired | revoked     (via le hold)
#
# Un accord crée le hold et son jeton dans la MÊME transaction
# que le passage pending → granted. Si la ressource est déjà
# tenue, la transaction est annulée et la décision devient
# un refus "resource-held" (un accord ne préempte jamais un
# hold actif).
# ============================================================
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlmodel import Session

from .db import transaction
from .errors import InvalidStateError, NotFoundError, ResourceBusyError, ValidationError
from .models import AccessLog, AccessRequest, DENIED, GRANTED, PENDING
from .repository import AccessRequestRepository
from . import notices

log = logging.getLogger(__name__)

GRANT, DENY = "grant", "deny"
RESOURCE_HELD = "resource-held"


class AccessRequestMachine:
    def __init__(self, engine, ledger, directory, dispatcher, publisher, channels=("push",),
                 default_ttl_min: int = 60, max_ttl_min: int = 1440):
        self.engine = engine
        self.ledger = ledger
        self.directory = directory
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.channels = list(channels)
        self.default_ttl_min = default_ttl_min
        self.max_ttl_min = max_ttl_min

    def get(self, request_id: int) -> AccessRequest:
        with Session(self.engine) as s:
            r = AccessRequestRepository(s).get(request_id)
        if r is None:
            raise NotFoundError(f"access request {request_id} not found")
        return r

    # ------------------------------------------------------------
    # submit - création d'une demande en attente
    # ------------------------------------------------------------
    def submit(self, user_id: str, door_id: str, site_id: str, permissions: Iterable[str]) -> AccessRequest:
        if isinstance(permissions, (str, bytes)) or not isinstance(permissions, (list, tuple, set, frozenset)):
            raise ValidationError("permissions must be a list of strings")
        if not all(isinstance(p, str) for p in permissions):
            raise ValidationError("permissions must be a list of strings")
        perms = sorted({p.strip() for p in permissions if p.strip()})
        if not perms:
            raise ValidationError("permissions must not be empty")
        if not user_id:
            raise ValidationError("user_id is required")
        if self.directory.site(site_id) is None:
            raise ValidationError(f"unknown site {site_id}")
        door = self.directory.door(door_id)
        if door is None:
            raise ValidationError(f"unknown door {door_id}")
        if door.site_id != site_id:
            raise ValidationError(f"door {door_id} does not belong to site {site_id}")

        with transaction(self.engine) as s:
            r = AccessRequestRepository(s).create(
                AccessRequest(user_id=user_id, door_id=door_id, site_id=site_id, permissions=perms)
            )
        log.info("[machine] request %s submitted by %s for %s", r.id, user_id, door_id,
                 extra={"request_id": r.id})
        self.log_event(r, "submitted")
        managers = self.directory.site_members(site_id, ["manager"])
        self.dispatcher.notify(notices.request_submitted(r, managers, self.channels))
        self.publisher.publish("AccessRequested", {"requestId": r.id, "userId": user_id,
                                                   "doorId": door_id, "siteId": site_id})
        return r

    # ------------------------------------------------------------
    # decide - valable uniquement depuis pending
    # ------------------------------------------------------------
    def decide(self, request_id: int, outcome: str, reason: Optional[str] = None,
               ttl_minutes: Optional[int] = None, now: Optional[datetime] = None) -> AccessRequest:
        if outcome not in (GRANT, DENY):
            raise ValidationError(f"outcome must be '{GRANT}' or '{DENY}'")
        minutes = ttl_minutes if ttl_minutes is not None else self.default_ttl_min
        if not isinstance(minutes, int) or isinstance(minutes, bool) or minutes <= 0:
            raise ValidationError("ttl_minutes must be a positive number of minutes")
        if minutes > self.max_ttl_min:
            raise ValidationError(f"ttl limited to {self.max_ttl_min} minutes")
        ttl = timedelta(minutes=minutes)

        r = self.get(request_id)
        if r.status != PENDING:
            raise InvalidStateError(f"request {request_id} already {r.status}")

        hold = None
        if outcome == GRANT:
            if self.ledger.active_for(r.door_id) is not None:
                outcome, reason = DENY, RESOURCE_HELD
            else:
                try:
                    hold = self._grant(r, ttl, reason, now)
                except ResourceBusyError:
                    # course perdue entre la vérification et l'insert
                    outcome, reason = DENY, RESOURCE_HELD

        if outcome == DENY:
            with transaction(self.engine) as s:
                if not AccessRequestRepository(s).decide(request_id, DENIED, reason):
                    raise InvalidStateError(f"request {request_id} was decided concurrently")

        r = self.get(request_id)
        log.info("[machine] request %s %s (%s)", r.id, r.status, r.reason or "-", extra={"request_id": r.id})

        if hold is not None:
            self.log_event(r, "granted", hold.token)
            staff = self.directory.site_staff(r.site_id)
            self.dispatcher.notify(notices.request_granted(r, hold, staff, self.channels))
            self.publisher.publish("AccessGranted", {"requestId": r.id, "holdId": hold.id,
                                                     "doorId": r.door_id, "expiresAt": hold.expires_at.isoformat()})
        else:
            self.log_event(r, "denied")
            self.dispatcher.notify(notices.request_denied(r, self.channels))
            self.publisher.publish("AccessDenied", {"requestId": r.id, "reason": r.reason})
        return r

    def _grant(self, r: AccessRequest, ttl: timedelta, reason, now):
        with transaction(self.engine) as s:
            hold = self.ledger.create(r.id, r.door_id, r.user_id, r.site_id, ttl,
                                      permissions=r.permissions, now=now, session=s)
            if not AccessRequestRepository(s).decide(r.id, GRANTED, reason, hold.id):
                raise InvalidStateError(f"request {r.id} was decided concurrently")
        return hold

    # granted → expired | revoked, quand le hold se termine
    def mark_ended(self, request_id: int, status: str) -> bool:
        with transaction(self.engine) as s:
            return AccessRequestRepository(s).close(request_id, status)

    # ------------------------------------------------------------
    # log_event - audit best-effort : ne fait jamais échouer l'appelant
    # ------------------------------------------------------------
    def log_event(self, request, action: str, token: Optional[str] = None):
        try:
            r = request if isinstance(request, AccessRequest) else self.get(request)
            with transaction(self.engine) as s:
                AccessRequestRepository(s).log(AccessLog(
                    request_id=r.id, user_id=r.user_id, door_id=r.door_id,
                    site_id=r.site_id, action=action, token=token,
                ))
        except Exception as e:
            log.error("[machine] audit log failed for request %s (%s): %s",
                      getattr(request, "id", request), action, e)
