# ============================================================
# service.py - Opérations exposées aux appelants
# ------------------------------------------------------------
# Assemble les composants (build_service) et expose :
#   submit_access_request, decide_access_request,
#   validate_access_token, extend_hold, revoke_hold,
#   run_sweep, dispatch_notification, batch_dispatch
#
# Chaque opération est bornée par un timeout et renvoie un
# résultat structuré : {"ok": True, ...} ou
# {"ok": False, "error": <code>, "message": ...}
# ============================================================
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import ValidationError as SchemaError

from . import settings
from .directory import Directory
from .dispatcher import NotificationDispatcher
from .errors import AccessServiceError
from .ledger import HoldLedger
from .machine import AccessRequestMachine
from .models import AccessRequest, Hold
from .publisher import EventPublisher
from .schemas import NotificationEvent
from .sweeper import ExpirySweeper
from .tokens import TokenCodec
from .transports import build_gateways

log = logging.getLogger(__name__)


def request_view(r: AccessRequest) -> dict:
    return {
        "id": r.id, "userId": r.user_id, "doorId": r.door_id, "siteId": r.site_id,
        "permissions": list(r.permissions), "status": r.status, "reason": r.reason,
        "holdId": r.hold_id, "createdAt": r.created_at, "decidedAt": r.decided_at,
    }


def hold_view(h: Hold) -> dict:
    return {
        "id": h.id, "requestId": h.request_id, "resourceId": h.resource_id, "userId": h.user_id,
        "siteId": h.site_id, "status": h.status, "expiresAt": h.expires_at,
        "extensionCount": h.extension_count, "reason": h.reason,
    }


class AccessService:
    def __init__(self, engine, directory, codec, dispatcher, ledger, machine, sweeper,
                 timeout: float = 10.0):
        self.engine = engine
        self.directory = directory
        self.codec = codec
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.machine = machine
        self.sweeper = sweeper
        self.timeout = timeout
        self.pool = ThreadPoolExecutor(max_workers=16, thread_name_prefix="access-op")

    def close(self):
        self.sweeper.stop()
        self.pool.shutdown(wait=True)
        self.dispatcher.close()

    # Exécute fn dans le pool, au plus `timeout` secondes
    def _call(self, name: str, fn, *args, **kwargs) -> dict:
        future = self.pool.submit(fn, *args, **kwargs)
        try:
            return {"ok": True, **future.result(timeout=self.timeout)}
        except FutureTimeout:
            log.error("[service] %s timed out after %ss", name, self.timeout)
            return {"ok": False, "error": "timeout", "message": f"{name} timed out"}
        except AccessServiceError as e:
            return {"ok": False, "error": e.code, "message": e.message}
        except SchemaError as e:
            return {"ok": False, "error": "validation", "message": str(e)}
        except Exception:
            log.exception("[service] %s failed", name)
            return {"ok": False, "error": "internal", "message": f"{name} failed"}

    def submit_access_request(self, user_id: str, door_id: str, site_id: str, permissions: Iterable[str]) -> dict:
        return self._call("submit", lambda: {
            "request": request_view(self.machine.submit(user_id, door_id, site_id, permissions))})

    def decide_access_request(self, request_id: int, outcome: str, reason: Optional[str] = None,
                              ttl_minutes: Optional[int] = None, now: Optional[datetime] = None) -> dict:
        def decide():
            r = self.machine.decide(request_id, outcome, reason, ttl_minutes, now=now)
            out = {"request": request_view(r)}
            if r.hold_id is not None:
                h = self.ledger.get(r.hold_id)
                out["hold"] = hold_view(h)
                out["token"] = h.token
            return out
        return self._call("decide", decide)

    def get_access_request(self, request_id: int) -> dict:
        return self._call("get_request", lambda: {"request": request_view(self.machine.get(request_id))})

    def validate_access_token(self, token: str, now: Optional[datetime] = None) -> dict:
        res = self._call("validate", lambda: {"result": self.codec.validate(token, now)})
        if not res["ok"]:
            return {"valid": False, "reason": res["error"]}
        return res["result"]

    def get_hold(self, hold_id: int) -> dict:
        return self._call("get_hold", lambda: {"hold": hold_view(self.ledger.get(hold_id))})

    def extend_hold(self, hold_id: int, minutes: int, now: Optional[datetime] = None) -> dict:
        return self._call("extend", self.ledger.extend, hold_id, minutes, now)

    def revoke_hold(self, hold_id: int, reason: str = "manual") -> dict:
        return self._call("revoke", lambda: {"hold": hold_view(self.ledger.revoke(hold_id, reason))})

    def run_sweep(self, now: Optional[datetime] = None) -> dict:
        return self._call("sweep", self.sweeper.run_sweep, now)

    def dispatch_notification(self, event) -> dict:
        def dispatch():
            ev = event if isinstance(event, NotificationEvent) else NotificationEvent.model_validate(event)
            return self.dispatcher.send(ev)
        return self._call("dispatch", dispatch)

    def batch_dispatch(self, entries: List[dict]) -> dict:
        return self._call("batch_dispatch", self.dispatcher.batch_send, entries)


# ------------------------------------------------------------
# Assemblage des composants
# ------------------------------------------------------------
def build_service(engine, gateways: Optional[dict] = None, publisher=None, channels=None,
                  timeout: Optional[float] = None) -> AccessService:
    channels = channels or settings.NOTIFY_CHANNELS
    if gateways is None:
        gateways = build_gateways(
            settings.GATEWAY_MODE,
            {"push": settings.PUSH_GATEWAY_URL, "email": settings.EMAIL_GATEWAY_URL, "sms": settings.SMS_GATEWAY_URL},
            settings.RABBIT_HOST,
            settings.DISPATCH_TIMEOUT_SECONDS,
        )
    if publisher is None:
        publisher = EventPublisher(settings.RABBIT_HOST, enabled=settings.PUBLISH_EVENTS)

    directory = Directory(engine)
    codec = TokenCodec(settings.TOKEN_SECRET, settings.TOKEN_ALGORITHM)
    dispatcher = NotificationDispatcher(engine, directory, gateways,
                                        timeout=settings.DISPATCH_TIMEOUT_SECONDS,
                                        max_attempts=settings.MAX_DELIVERY_ATTEMPTS)
    ledger = HoldLedger(engine, codec, dispatcher, directory, publisher, channels,
                        max_extension_min=settings.MAX_EXTENSION_MIN)
    codec.ledger = ledger
    machine = AccessRequestMachine(engine, ledger, directory, dispatcher, publisher, channels,
                                   default_ttl_min=settings.DEFAULT_HOLD_TTL_MIN,
                                   max_ttl_min=settings.MAX_HOLD_TTL_MIN)
    sweeper = ExpirySweeper(ledger, dispatcher, directory, publisher, channels,
                            interval=settings.SWEEP_INTERVAL_SECONDS,
                            warning_minutes=settings.EXPIRY_WARNING_MIN)
    return AccessService(engine, directory, codec, dispatcher, ledger, machine, sweeper,
                         timeout=timeout or settings.OPERATION_TIMEOUT_SECONDS)
