# ============================================================
# publisher.py - Émission d'événements RabbitMQ
# ------------------------------------------------------------
# Publie chaque transition (AccessRequested, AccessGranted,
# AccessDenied, HoldExtended, HoldRevoked, HoldExpired) sur
# l'échange "events" en mode fanout, pour les autres services.
# La transition est déjà commitée : un échec de publication est
# journalisé, jamais remonté.
# ============================================================
import json
import logging
import uuid

import pika
from pika.exceptions import AMQPError

log = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self, host: str, enabled: bool = True, exchange: str = "events"):
        self.host = host
        self.enabled = enabled
        self.exchange = exchange

    #   - event_type : nom de l'événement
    #   - payload    : contenu du message
    # Chaque message porte un messageId pour la déduplication côté consumers.
    def publish(self, event_type: str, payload: dict):
        if not self.enabled:
            return
        message = {"messageId": str(uuid.uuid4()), "type": event_type, "payload": payload}
        try:
            conn = pika.BlockingConnection(pika.ConnectionParameters(host=self.host, heartbeat=60))
            try:
                ch = conn.channel()
                # durable=True pour survivre aux redémarrages RabbitMQ
                ch.exchange_declare(exchange=self.exchange, exchange_type="fanout", durable=True)
                ch.basic_publish(exchange=self.exchange, routing_key="", body=json.dumps(message, default=str))
            finally:
                conn.close()
        except AMQPError as e:
            log.warning("[event] publish %s failed: %s", event_type, e)
            return
        log.info("[event] %s %s", event_type, payload)
