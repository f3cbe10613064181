# ============================================================
# dispatcher.py - Diffusion des notifications
# ------------------------------------------------------------
# Un événement logique (granted, denied, expired…) est résolu
# en destinataires concrets puis envoyé sur chaque canal.
#
# Idempotence : on garde en base (DeliveryRecord) une ligne par
# (événement, canal, destinataire). La ligne est "réservée" de
# façon atomique (insert unique, ou reprise d'un échec par
# UPDATE conditionnel) avant tout appel à la passerelle. Un
# renvoi du même événement est donc un no-op si déjà livré.
#
# Les envois partent en parallèle (pool de threads), bornés par
# un timeout. Un échec de canal est journalisé et retenté plus
# tard par le sweeper ; il ne remonte jamais dans la machine
# d'états.
# ============================================================
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .db import transaction
from .directory import address_for
from .errors import TransportError
from .models import DeliveryRecord, utcnow
from .schemas import NotificationEvent, NotificationPayload, NotificationTarget, PUSH
from .transports import InvalidRecipientError

log = logging.getLogger(__name__)

DELIVERED, FAILED, PENDING = "delivered", "failed", "pending"


class NotificationDispatcher:
    def __init__(self, engine, directory, gateways: dict, timeout: float = 5.0,
                 max_attempts: int = 5, workers: int = 8):
        self.engine = engine
        self.directory = directory
        self.gateways = gateways
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")

    def close(self):
        self.pool.shutdown(wait=True)

    # ------------------------------------------------------------
    # send - un événement, N canaux × M destinataires
    # ------------------------------------------------------------
    def send(self, event: NotificationEvent) -> Dict[str, Any]:
        result = {"event_id": event.event_id, "delivered": 0, "skipped": 0, "failed": []}
        users = self.directory.resolve(event.target)
        payload = event.payload.model_dump()
        payload["data"] = {**payload["data"], "type": event.kind, "eventId": event.event_id}

        jobs = []
        for channel in event.channels:
            if channel not in self.gateways:
                result["failed"].append({"channel": channel, "error": "no gateway"})
                continue
            for user in users:
                address = address_for(user, channel)
                if not address:
                    continue
                if self._claim(event.event_id, channel, user.id, address, payload):
                    jobs.append((channel, user.id, address))
                else:
                    result["skipped"] += 1

        self._run(event.event_id, jobs, payload, result)
        return result

    # Utilisé après une transition déjà commitée : ne lève jamais
    def notify(self, event: NotificationEvent):
        try:
            return self.send(event)
        except Exception:
            log.exception("[notify] dispatch of %s failed", event.event_id, extra={"event_id": event.event_id})
            return None

    # ------------------------------------------------------------
    # batch_send - chaque entrée est traitée indépendamment ;
    # les échecs sont collectés, jamais levés en bloc
    # ------------------------------------------------------------
    def batch_send(self, entries: List[dict]) -> Dict[str, Any]:
        sent, failures = 0, []
        for index, entry in enumerate(entries):
            try:
                event = self._event_from_entry(entry)
            except (KeyError, TypeError, SchemaError) as e:
                failures.append({"index": index, "error": f"malformed entry: {e}"})
                continue
            res = self.send(event)
            if res["failed"]:
                failures.append({"index": index, "error": res["failed"][0]["error"]})
            else:
                sent += 1
        if failures:
            log.warning("[notify] batch: %d sent, %d failed", sent, len(failures))
        return {"sent": sent, "failures": failures}

    @staticmethod
    def _event_from_entry(entry: dict) -> NotificationEvent:
        if not isinstance(entry, dict):
            raise TypeError("entry must be an object")
        return NotificationEvent(
            event_id=entry.get("eventId") or f"batch:{uuid.uuid4()}",
            kind=entry.get("kind", "custom"),
            target=NotificationTarget.model_validate(entry["target"]),
            payload=NotificationPayload.model_validate(entry["payload"]),
            channels=[entry["type"]],
        )

    # ------------------------------------------------------------
    # retry_failed - reprise des échecs dans la limite du budget
    # ------------------------------------------------------------
    def retry_failed(self, max_attempts: Optional[int] = None) -> int:
        budget = min(max_attempts or self.max_attempts, self.max_attempts)
        with Session(self.engine) as s:
            rows = s.exec(select(DeliveryRecord).where(
                DeliveryRecord.status == FAILED,
                DeliveryRecord.attempts < budget,
            )).all()
        retried = 0
        for rec in rows:
            user = self.directory.user(rec.recipient)
            address = address_for(user, rec.channel) if user else None
            if not address or rec.channel not in self.gateways:
                continue
            if not self._reclaim(rec.event_id, rec.channel, rec.recipient, address, budget):
                continue
            result = {"delivered": 0, "failed": []}
            self._run(rec.event_id, [(rec.channel, rec.recipient, address)], rec.payload, result)
            retried += 1
        return retried

    # ------------------------------------------------------------
    # Réservation atomique d'un triplet (événement, canal, destinataire)
    # ------------------------------------------------------------
    def _claim(self, event_id: str, channel: str, recipient: str, address: str, payload: dict) -> bool:
        try:
            with transaction(self.engine) as s:
                s.add(DeliveryRecord(event_id=event_id, channel=channel, recipient=recipient,
                                     address=address, status=PENDING, attempts=1, payload=payload))
            return True
        except IntegrityError:
            # déjà connu : livré ou en cours → no-op, échoué → on reprend
            return self._reclaim(event_id, channel, recipient, address)

    def _reclaim(self, event_id: str, channel: str, recipient: str, address: str,
                 budget: Optional[int] = None) -> bool:
        with transaction(self.engine) as s:
            res = s.connection().execute(
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.event_id == event_id,
                    DeliveryRecord.channel == channel,
                    DeliveryRecord.recipient == recipient,
                    DeliveryRecord.status == FAILED,
                    DeliveryRecord.attempts < (budget or self.max_attempts),
                )
                .values(status=PENDING, address=address, attempts=DeliveryRecord.attempts + 1, updated_at=utcnow())
            )
            return res.rowcount == 1

    def _run(self, event_id: str, jobs: list, payload: dict, result: dict):
        if not jobs:
            return
        futures = {
            self.pool.submit(self._deliver_one, event_id, channel, recipient, address, payload): (channel, recipient)
            for channel, recipient, address in jobs
        }
        done, not_done = wait(futures, timeout=self.timeout)
        for fut in done:
            channel, recipient = futures[fut]
            error = fut.result()
            if error is None:
                result["delivered"] += 1
            else:
                result["failed"].append({"channel": channel, "recipient": recipient, "error": error})
        for fut in not_done:
            channel, recipient = futures[fut]
            self._finish(event_id, channel, recipient, "timeout", only_pending=True)
            result["failed"].append({"channel": channel, "recipient": recipient, "error": "timeout"})

    # Retourne None si livré, sinon le message d'erreur
    def _deliver_one(self, event_id: str, channel: str, recipient: str, address: str, payload: dict) -> Optional[str]:
        try:
            self.gateways[channel].deliver(address, payload)
        except InvalidRecipientError as e:
            if channel == PUSH:
                self.directory.clear_push_token(recipient, address)
            self._finish(event_id, channel, recipient, e.message)
            return e.message
        except TransportError as e:
            self._finish(event_id, channel, recipient, e.message)
            return e.message
        except Exception as e:
            log.exception("[notify] %s gateway crashed for event=%s", channel, event_id)
            self._finish(event_id, channel, recipient, str(e))
            return str(e)
        self._finish(event_id, channel, recipient, None)
        return None

    def _finish(self, event_id: str, channel: str, recipient: str, error: Optional[str], only_pending: bool = False):
        conds = [
            DeliveryRecord.event_id == event_id,
            DeliveryRecord.channel == channel,
            DeliveryRecord.recipient == recipient,
        ]
        if only_pending:
            conds.append(DeliveryRecord.status == PENDING)
        values = {"status": DELIVERED if error is None else FAILED, "last_error": error, "updated_at": utcnow()}
        with transaction(self.engine) as s:
            s.connection().execute(update(DeliveryRecord).where(*conds).values(**values))
            if error is None:
                return
            rec = s.exec(select(DeliveryRecord).where(*conds[:3])).first()
        extra = {"event_id": event_id, "channel": channel}
        if rec is not None and rec.attempts >= self.max_attempts:
            log.error("[notify] retry budget exhausted for %s/%s/%s: %s",
                      event_id, channel, recipient, error, extra=extra)
        else:
            log.warning("[notify] %s delivery failed for %s (%s)", channel, recipient, error, extra=extra)
