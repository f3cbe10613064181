# ============================================================
# db.py - Moteur SQLModel et sessions
# ------------------------------------------------------------
# PostgreSQL en production, SQLite pour les tests et le dev.
# Pour SQLite on autorise le partage entre threads (sweeper,
# consumer, workers FastAPI) et on attend les verrous d'écriture.
# ============================================================
from contextlib import contextmanager
from sqlmodel import SQLModel, Session, create_engine

from . import models  # noqa: F401  (enregistre les tables)


def make_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


def init_db(engine):
    SQLModel.metadata.create_all(engine)


# Une transaction = une session : commit si tout va bien, rollback sinon
@contextmanager
def transaction(engine):
    with Session(engine, expire_on_commit=False) as s:
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
