# ============================================================
# Access Service - RabbitMQ Consumer
# ------------------------------------------------------------
# Écoute l'échange "events" et déclenche les opérations :
#   - SweepRequested          → run_sweep (cron externe, lookup
#                               qui a vu un hold périmé…)
#   - AccessDecisionRequested → decide (console des managers)
# Les autres types sont ignorés.
# ============================================================
import json
import logging
import threading
import time
from datetime import datetime

import pika
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .models import ProcessedMessage

log = logging.getLogger(__name__)


class EventConsumer:
    def __init__(self, service, host: str, exchange: str = "events"):
        self.service = service
        self.host = host
        self.exchange = exchange

    # ------------------------------------------------------------
    # On évite de traiter deux fois le même message : la table
    # ProcessedMessage garde l'ID des messages déjà traités (le
    # broker peut redélivrer, plusieurs instances peuvent écouter).
    # ------------------------------------------------------------
    def already_processed(self, mid: str) -> bool:
        with Session(self.service.engine) as s:
            return s.exec(select(ProcessedMessage).where(ProcessedMessage.message_id == mid)).first() is not None

    def mark_processed(self, mid: str):
        with Session(self.service.engine) as s:
            s.add(ProcessedMessage(message_id=mid))
            try:
                s.commit()
            except IntegrityError:
                s.rollback()

    # Retourne le résultat de l'opération, ou None si ignoré
    def handle(self, msg: dict):
        etype = msg.get("type")
        payload = msg.get("payload") or {}
        message_id = msg.get("messageId")
        if etype not in ("SweepRequested", "AccessDecisionRequested"):
            return None
        if message_id and self.already_processed(message_id):
            log.info("[consumer] %s already processed, skipping", message_id)
            return None

        if etype == "SweepRequested":
            now = payload.get("now")
            result = self.service.run_sweep(datetime.fromisoformat(now) if now else None)
        else:
            request_id = payload.get("requestId")
            if request_id is None:
                log.warning("[consumer] skipping %s (no requestId)", etype)
                return None
            result = self.service.decide_access_request(
                int(request_id), payload.get("outcome", ""), payload.get("reason"), payload.get("ttlMinutes"),
            )
        if not result.get("ok"):
            log.warning("[consumer] %s failed: %s", etype, result.get("message"))

        if message_id:
            self.mark_processed(message_id)
        return result

    # Callback exécuté à chaque message reçu depuis RabbitMQ
    def on_message(self, ch, method, properties, body):
        try:
            msg = json.loads(body)
        except ValueError as e:
            log.warning("[consumer] bad payload: %s", e)
            return
        if not isinstance(msg, dict):
            return
        try:
            self.handle(msg)
        except Exception:
            log.exception("[consumer] handler crashed for %s", msg.get("type"))

    #  Boucle de connexion + consommation RabbitMQ
    def run(self):
        attempt = 0
        while True:
            try:
                log.info("[consumer] connecting to rabbitmq at %s...", self.host)
                conn = pika.BlockingConnection(pika.ConnectionParameters(host=self.host, heartbeat=60))
                ch = conn.channel()
                # Déclare l'échange 'events' de type fanout (broadcast)
                ch.exchange_declare(exchange=self.exchange, exchange_type="fanout", durable=True)
                # Queue anonyme, exclusive à ce consumer
                q = ch.queue_declare(queue="", exclusive=True).method.queue
                ch.queue_bind(exchange=self.exchange, queue=q)
                log.info("[consumer] bound to exchange '%s' queue='%s'", self.exchange, q)
                attempt = 0
                ch.basic_consume(queue=q, on_message_callback=self.on_message, auto_ack=True)
                ch.start_consuming()
            except Exception as e:
                attempt += 1
                wait = min(5 * attempt, 30)
                log.warning("[consumer] connection error: %s - retrying in %ss", e, wait)
                time.sleep(wait)

    def start(self):
        threading.Thread(target=self.run, name="events-consumer", daemon=True).start()
