# ============================================================
# app.py - Point d'entrée du service Access
# ------------------------------------------------------------
# Initialise l'application FastAPI :
#   - Crée les tables dans la base de données
#   - Assemble le service (ledger, machine, sweeper, dispatcher)
#   - Démarre le sweeper périodique et le consumer RabbitMQ
#   - Arrête proprement le sweeper à l'extinction
# ============================================================
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import settings
from .api import HTTP_STATUS, router
from .consumer import EventConsumer
from .db import init_db, make_engine
from .errors import AccessServiceError
from .observability import setup_logging
from .service import build_service

log = logging.getLogger(__name__)


def create_app(service=None, start_background: bool = True) -> FastAPI:
    app = FastAPI(title="Access Service")
    app.include_router(router)

    @app.exception_handler(AccessServiceError)
    async def access_error(request: Request, exc: AccessServiceError):
        return JSONResponse(status_code=HTTP_STATUS.get(exc.code, exc.http_status),
                            content={"error": exc.code, "message": exc.message})

    # 1. Crée les tables SQL et assemble le service.
    # 2. Lance le sweeper et le consumer sans bloquer l'API.
    @app.on_event("startup")
    def startup():
        svc = service
        if svc is None:
            setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
            engine = make_engine(settings.DATABASE_URL)
            init_db(engine)
            svc = build_service(engine)
        app.state.service = svc
        if start_background:
            svc.sweeper.start()
            EventConsumer(svc, settings.RABBIT_HOST).start()

    # Le sweep en cours termine son hold courant avant l'arrêt
    @app.on_event("shutdown")
    def shutdown():
        svc = getattr(app.state, "service", None)
        if svc is None:
            return
        if service is None:
            svc.close()
        else:
            svc.sweeper.stop()
        log.info("[app] shutdown complete")

    return app


app = create_app()
