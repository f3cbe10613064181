# ============================================================
# notices.py - Construction des événements de notification
# ------------------------------------------------------------
# Une transition = un événement. Les identifiants sont
# déterministes (entité + transition) : un même passage
# d'état rejoué ne produit jamais un second envoi.
# ============================================================
from typing import List

from .models import AccessRequest, Hold
from .schemas import NotificationEvent, NotificationPayload, NotificationTarget


def _event(event_id, kind, user_ids, title, body, data, channels) -> NotificationEvent:
    return NotificationEvent(
        event_id=event_id,
        kind=kind,
        target=NotificationTarget(user_ids=list(dict.fromkeys(user_ids))),
        payload=NotificationPayload(title=title, body=body, data={k: str(v) for k, v in data.items()}),
        channels=list(channels),
    )


def _request_data(r: AccessRequest) -> dict:
    return {"requestId": r.id, "siteId": r.site_id, "doorId": r.door_id}


def _hold_data(h: Hold) -> dict:
    return {"holdId": h.id, "siteId": h.site_id, "resourceId": h.resource_id,
            "expiresAt": h.expires_at.isoformat()}


# Nouvelle demande → managers du site
def request_submitted(r: AccessRequest, managers: List[str], channels) -> NotificationEvent:
    return _event(f"request:{r.id}:requested", "requested", managers,
                  "New Access Request", f"{r.user_id} requested access to {r.door_id}",
                  _request_data(r), channels)


# Accord → demandeur + managers / intervenants du site
def request_granted(r: AccessRequest, h: Hold, staff: List[str], channels) -> NotificationEvent:
    return _event(f"request:{r.id}:granted", "granted", [r.user_id, *staff],
                  "Access Request Approved",
                  f"Access to {r.door_id} granted until {h.expires_at:%Y-%m-%d %H:%M} UTC",
                  {**_request_data(r), "holdId": h.id}, channels)


# Refus → demandeur uniquement
def request_denied(r: AccessRequest, channels) -> NotificationEvent:
    body = f"Your access request for {r.door_id} has been denied"
    if r.reason:
        body += f" ({r.reason})"
    return _event(f"request:{r.id}:denied", "denied", [r.user_id],
                  "Access Request Denied", body, {**_request_data(r), "reason": r.reason or ""}, channels)


def hold_extended(h: Hold, minutes: int, staff: List[str], channels) -> NotificationEvent:
    return _event(f"hold:{h.id}:extended:{h.extension_count}", "extended", [h.user_id, *staff],
                  "Hold Extended", f"Hold for {h.resource_id} has been extended by {minutes} minutes",
                  _hold_data(h), channels)


def hold_expiring(h: Hold, channels) -> NotificationEvent:
    return _event(f"hold:{h.id}:expiring:{h.version}", "expiring-soon", [h.user_id],
                  "Hold Expiring Soon", f"Hold for {h.resource_id} expires at {h.expires_at:%H:%M} UTC",
                  _hold_data(h), channels)


def hold_expired(h: Hold, staff: List[str], channels) -> NotificationEvent:
    return _event(f"hold:{h.id}:expired", "expired", [h.user_id, *staff],
                  "Hold Expired", f"Hold for {h.resource_id} has expired", _hold_data(h), channels)


def hold_revoked(h: Hold, staff: List[str], channels) -> NotificationEvent:
    return _event(f"hold:{h.id}:revoked", "revoked", [h.user_id, *staff],
                  "Access Revoked", f"Access to {h.resource_id} has been revoked: {h.reason or 'manual'}",
                  {**_hold_data(h), "reason": h.reason or ""}, channels)
