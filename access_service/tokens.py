# ============================================================
# tokens.py - Émission et validation des jetons d'accès
# ------------------------------------------------------------
# Un jeton est un JWT signé (HS256 par défaut) qui embarque :
#   utilisateur, porte, site, permissions, hold, iat, exp, nonce
# Toute modification d'un bit casse la signature.
#
# La validité n'est pas autonome : un jeton bien signé et non
# expiré reste refusé si son hold n'est plus vivant (révoqué,
# expiré). validate() ne lève jamais d'exception.
# ============================================================
import logging
import math
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt

from .errors import TokenInvalidError
from .models import as_utc, utcnow

log = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["sub", "door", "site", "perms", "hold", "iat", "exp", "nonce"]


# Secondes entières arrondies vers le bas : exp <= expires_at du hold
def to_epoch(dt: datetime) -> int:
    return math.floor(as_utc(dt).timestamp())


def from_epoch(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class TokenCodec:
    def __init__(self, secret: str, algorithm: str = "HS256", ledger=None):
        if not secret:
            raise ValueError("token secret must not be empty")
        self.secret = secret
        self.algorithm = algorithm
        # HoldLedger (ou tout objet avec is_live(hold_id)), branché par le conteneur
        self.ledger = ledger

    def issue(self, claims: Dict[str, Any]) -> str:
        payload = {
            "sub": str(claims["userId"]),
            "door": str(claims["doorId"]),
            "site": str(claims["siteId"]),
            "perms": sorted(set(claims["permissions"])),
            "hold": claims.get("holdId"),
            "iat": to_epoch(claims.get("issuedAt") or utcnow()),
            "exp": to_epoch(claims["expiresAt"]),
            "nonce": secrets.token_hex(8),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    # Vérifie la structure et la signature uniquement (pas l'expiration)
    def decode(self, token: str) -> Dict[str, Any]:
        if not isinstance(token, str) or not token:
            raise TokenInvalidError("malformed")
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False, "require": REQUIRED_CLAIMS},
            )
        except jwt.InvalidTokenError as e:
            raise TokenInvalidError("malformed") from e
        if not isinstance(payload.get("perms"), list) or not isinstance(payload.get("exp"), int):
            raise TokenInvalidError("malformed")
        return payload

    def validate(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = as_utc(now) or utcnow()
        try:
            payload = self.decode(token)
        except TokenInvalidError as e:
            return {"valid": False, "reason": e.reason}

        # 1) expiration : jamais valide après exp, quel que soit le hold
        if now.timestamp() > payload["exp"]:
            return {"valid": False, "reason": "expired"}

        # 2) le hold doit toujours être vivant
        if self.ledger is not None:
            try:
                live = self.ledger.is_live(payload["hold"])
            except Exception as e:
                log.warning("[tokens] hold lookup failed for hold=%s: %s", payload["hold"], e)
                return {"valid": False, "reason": "hold-lookup-failed"}
            if not live:
                return {"valid": False, "reason": "hold-inactive"}

        return {
            "valid": True,
            "userId": payload["sub"],
            "doorId": payload["door"],
            "siteId": payload["site"],
            "permissions": payload["perms"],
            "holdId": payload["hold"],
            "expiresAt": from_epoch(payload["exp"]),
        }
