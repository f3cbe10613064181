# ============================================================
# transports.py - Passerelles push / email / SMS
# ------------------------------------------------------------
# Interface commune : deliver(recipient, payload). Retourne
# normalement en cas de succès, lève TransportError sinon.
#   - LogGateway    : mock, écrit le message dans les logs
#   - HttpGateway   : POST JSON vers un fournisseur (httpx)
#   - RabbitGateway : dépose le message sur l'échange
#                     "notifications" pour un worker d'envoi
# ============================================================
import json
import logging

import httpx
import pika
from pika.exceptions import AMQPError

from .errors import TransportError
from .schemas import CHANNELS

log = logging.getLogger(__name__)


class InvalidRecipientError(TransportError):
    code = "invalid-recipient"


class Gateway:
    channel = "push"

    def deliver(self, recipient: str, payload: dict):
        raise NotImplementedError


class LogGateway(Gateway):
    def __init__(self, channel: str):
        self.channel = channel

    def deliver(self, recipient: str, payload: dict):
        log.info("[notification] %s -> mock %s: %s", recipient, self.channel, payload.get("title"))


class HttpGateway(Gateway):
    def __init__(self, channel: str, url: str, timeout: float = 5.0):
        self.channel = channel
        self.url = url
        self.timeout = timeout

    def deliver(self, recipient: str, payload: dict):
        try:
            r = httpx.post(self.url, json={"to": recipient, **payload}, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise TransportError(f"{self.channel} gateway unreachable: {e}") from e
        # 404/410 : destinataire inconnu côté fournisseur (jeton push périmé…)
        if r.status_code in (404, 410):
            raise InvalidRecipientError(f"{self.channel} recipient rejected ({r.status_code})")
        if r.status_code >= 400:
            raise TransportError(f"{self.channel} gateway returned {r.status_code}")


class RabbitGateway(Gateway):
    def __init__(self, channel: str, host: str, exchange: str = "notifications"):
        self.channel = channel
        self.host = host
        self.exchange = exchange

    def deliver(self, recipient: str, payload: dict):
        body = json.dumps({"channel": self.channel, "to": recipient, "payload": payload}, default=str)
        try:
            conn = pika.BlockingConnection(pika.ConnectionParameters(host=self.host, heartbeat=60))
            try:
                ch = conn.channel()
                ch.exchange_declare(exchange=self.exchange, exchange_type="direct", durable=True)
                ch.basic_publish(exchange=self.exchange, routing_key=self.channel, body=body)
            finally:
                conn.close()
        except AMQPError as e:
            raise TransportError(f"{self.channel} broker unavailable: {e}") from e


def build_gateways(mode: str, urls: dict, rabbit_host: str, timeout: float) -> dict:
    gateways = {}
    for channel in CHANNELS:
        if mode == "http" and urls.get(channel):
            gateways[channel] = HttpGateway(channel, urls[channel], timeout)
        elif mode == "rabbit":
            gateways[channel] = RabbitGateway(channel, rabbit_host)
        else:
            gateways[channel] = LogGateway(channel)
    return gateways
