# ============================================================
# observability.py - Configuration des logs
# ------------------------------------------------------------
# JSON en production (LOG_FORMAT=json), texte lisible sinon.
# Les champs hold_id / request_id / event_id / channel passés
# via `extra=` sont repris dans la sortie JSON.
# ============================================================
import json
import logging
from datetime import datetime, timezone

EXTRA_FIELDS = ("hold_id", "request_id", "event_id", "channel")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        out = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                out[key] = val
        if record.exc_info:
            out["exception"] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", fmt: str = "plain"):
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
