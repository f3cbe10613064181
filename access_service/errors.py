# ============================================================
# errors.py - Erreurs métier du service Access
# ------------------------------------------------------------
# Chaque erreur porte un code stable (renvoyé aux appelants)
# et le statut HTTP correspondant pour la couche API.
# ============================================================


class AccessServiceError(Exception):
    code = "error"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


# Entrée invalide ou inconnue : faute de l'appelant, pas de retry
class ValidationError(AccessServiceError):
    code = "validation"
    http_status = 400


# Opération interdite dans l'état actuel : relire l'état avant de réessayer
class InvalidStateError(AccessServiceError):
    code = "invalid-state"
    http_status = 409


# Conflit d'exclusivité : la ressource a déjà un hold actif
class ResourceBusyError(AccessServiceError):
    code = "resource-busy"
    http_status = 409


class NotFoundError(AccessServiceError):
    code = "not-found"
    http_status = 404


# Échec d'un canal de notification (retry possible, pas de rollback)
class TransportError(AccessServiceError):
    code = "transport"
    http_status = 502


# Jeton illisible ou falsifié. Ne sort jamais de TokenCodec.validate(),
# qui renvoie toujours un résultat {"valid": False, "reason": ...}.
class TokenInvalidError(AccessServiceError):
    code = "token-invalid"
    http_status = 401

    def __init__(self, reason: str = "malformed"):
        super().__init__(reason)
        self.reason = reason
