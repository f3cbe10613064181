# ============================================================
# sweeper.py - Expiration automatique des holds
# ------------------------------------------------------------
# Deux déclencheurs :
#   - périodique : thread de fond démarré au lancement du service
#   - à la demande : run_sweep(now) (API, message RabbitMQ, cron)
#
# run_sweep est idempotent : un hold déjà expiré n'est plus
# sélectionné, donc un second passage au même instant ne fait
# aucune transition et n'envoie aucune notification.
# ============================================================
import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from .models import as_utc, utcnow
from . import notices

log = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(self, ledger, dispatcher, directory, publisher, channels=("push",),
                 interval: float = 60.0, warning_minutes: int = 5):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.directory = directory
        self.publisher = publisher
        self.channels = list(channels)
        self.interval = interval
        self.warning = timedelta(minutes=warning_minutes)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # un seul sweep à la fois (thread périodique vs appel manuel)
        self._lock = threading.Lock()

    def run_sweep(self, now: Optional[datetime] = None, stop: Optional[threading.Event] = None) -> dict:
        now = as_utc(now) or utcnow()
        with self._lock:
            expiring = self.ledger.mark_expiring(now, self.warning, stop=stop) if self.warning else []
            for h in expiring:
                self.dispatcher.notify(notices.hold_expiring(h, self.channels))

            expired = self.ledger.sweep_expired(now, stop=stop)
            for h in expired:
                self._announce_expired(h)
        if expired or expiring:
            log.info("[sweeper] %d expired, %d expiring soon", len(expired), len(expiring))
        return {"expired": [h.id for h in expired], "expiring": [h.id for h in expiring]}

    # Hold et demande sont déjà commités "expired" : chaque hold est
    # annoncé indépendamment, un échec ne bloque pas les suivants
    def _announce_expired(self, h):
        try:
            staff = self.directory.site_staff(h.site_id)
        except Exception:
            log.exception("[sweeper] staff lookup failed for hold %s, notifying holder only", h.id,
                          extra={"hold_id": h.id})
            staff = []
        self.dispatcher.notify(notices.hold_expired(h, staff, self.channels))
        try:
            self.publisher.publish("HoldExpired", {"holdId": h.id, "requestId": h.request_id,
                                                   "resourceId": h.resource_id})
        except Exception:
            log.exception("[sweeper] HoldExpired publish failed for hold %s", h.id, extra={"hold_id": h.id})

    # ------------------------------------------------------------
    # Boucle périodique
    # ------------------------------------------------------------
    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-sweeper", daemon=True)
        self._thread.start()
        log.info("[sweeper] started, every %ss", self.interval)

    # Le sweep en cours termine la transition du hold courant puis s'arrête
    def stop(self, timeout: float = 30.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                log.warning("[sweeper] still running after %ss", timeout)
            self._thread = None
        log.info("[sweeper] stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_sweep(stop=self._stop)
                self.dispatcher.retry_failed()
            except Exception as e:
                log.exception("[sweeper] sweep failed: %s", e)
            self._stop.wait(self.interval)
