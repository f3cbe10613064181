# ============================================================
# Access API Router
# ------------------------------------------------------------
# Expose les endpoints REST : demandes d'accès, décisions,
# validation de jeton, prolongation / révocation des holds,
# sweep à la demande et envoi de notifications.
# Les résultats {"ok": False, ...} deviennent des HTTPException.
# ============================================================
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request

from .schemas import (
    DecisionRequest, ExtendRequest, RevokeRequest, SubmitRequest, SweepRequest, ValidateRequest,
)
from .service import AccessService

router = APIRouter()

HTTP_STATUS = {
    "validation": 400,
    "not-found": 404,
    "invalid-state": 409,
    "resource-busy": 409,
    "transport": 502,
    "timeout": 504,
    "internal": 500,
}


# Dépendance FastAPI : le service assemblé au démarrage
def get_service(request: Request) -> AccessService:
    return request.app.state.service


def unwrap(res: dict) -> dict:
    if not res.get("ok"):
        raise HTTPException(HTTP_STATUS.get(res.get("error"), 500), res.get("message", res.get("error")))
    return {k: v for k, v in res.items() if k != "ok"}


# ------------------------------------------------------------
# POST /v1/access-requests - Créer une demande (pending)
# ------------------------------------------------------------
@router.post("/v1/access-requests", status_code=201)
def submit(body: SubmitRequest, svc: AccessService = Depends(get_service)):
    return unwrap(svc.submit_access_request(body.user_id, body.door_id, body.site_id, body.permissions))


@router.get("/v1/access-requests/{request_id}")
def get_request(request_id: int, svc: AccessService = Depends(get_service)):
    return unwrap(svc.get_access_request(request_id))


# ------------------------------------------------------------
# POST /v1/access-requests/{id}/decision - grant | deny
# ------------------------------------------------------------
# Un accord sur une ressource déjà tenue revient en refus
# "resource-held" (200, la décision a bien été prise).
# ------------------------------------------------------------
@router.post("/v1/access-requests/{request_id}/decision")
def decide(request_id: int, body: DecisionRequest, svc: AccessService = Depends(get_service)):
    return unwrap(svc.decide_access_request(request_id, body.outcome, body.reason, body.ttl_minutes))


#  Validation d'un jeton (toujours 200, résultat discriminé)
@router.post("/v1/access/validate")
def validate(body: ValidateRequest, svc: AccessService = Depends(get_service)):
    return svc.validate_access_token(body.token)


@router.get("/v1/holds/{hold_id}")
def get_hold(hold_id: int, svc: AccessService = Depends(get_service)):
    return unwrap(svc.get_hold(hold_id))


@router.post("/v1/holds/{hold_id}/extend")
def extend(hold_id: int, body: ExtendRequest, svc: AccessService = Depends(get_service)):
    return unwrap(svc.extend_hold(hold_id, body.minutes))


@router.post("/v1/holds/{hold_id}/revoke")
def revoke(hold_id: int, body: RevokeRequest, svc: AccessService = Depends(get_service)):
    return unwrap(svc.revoke_hold(hold_id, body.reason))


@router.post("/v1/sweeps")
def sweep(body: SweepRequest, svc: AccessService = Depends(get_service)):
    return unwrap(svc.run_sweep(body.now))


@router.post("/v1/notifications")
def notify(body: Dict[str, Any], svc: AccessService = Depends(get_service)):
    return unwrap(svc.dispatch_notification(body))


# Les entrées mal formées sont signalées dans "failures", pas en 400
@router.post("/v1/notifications/batch")
def notify_batch(entries: List[Any], svc: AccessService = Depends(get_service)):
    return unwrap(svc.batch_dispatch(entries))


@router.get("/health")
def health(svc: AccessService = Depends(get_service)):
    return {"ok": True, "sweeper": svc.sweeper.running}
