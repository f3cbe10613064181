# ============================================================
# directory.py - Annuaire : sites, portes, utilisateurs, rôles
# ------------------------------------------------------------
# Sert à valider les demandes (porte connue, rattachée au site)
# et à résoudre une cible logique de notification en liste
# d'utilisateurs concrets.
# ============================================================
import logging
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .models import Door, Site, SiteMembership, User
from .schemas import EMAIL, PUSH, SMS, NotificationTarget

log = logging.getLogger(__name__)

SITE_STAFF_ROLES = ("manager", "responder")


class Directory:
    def __init__(self, engine):
        self.engine = engine

    # Enregistre ou met à jour des entrées (Site, Door, User, SiteMembership)
    def add(self, *rows):
        with Session(self.engine) as s:
            for r in rows:
                s.merge(r)
            s.commit()

    def door(self, door_id: str) -> Optional[Door]:
        with Session(self.engine) as s:
            return s.get(Door, door_id)

    def site(self, site_id: str) -> Optional[Site]:
        with Session(self.engine) as s:
            return s.get(Site, site_id)

    def user(self, user_id: str) -> Optional[User]:
        with Session(self.engine) as s:
            return s.get(User, user_id)

    def site_members(self, site_id: str, roles=None) -> List[str]:
        q = select(SiteMembership.user_id).where(SiteMembership.site_id == site_id)
        if roles:
            q = q.where(SiteMembership.role.in_(roles))
        with Session(self.engine) as s:
            return sorted(s.exec(q).all())

    def site_staff(self, site_id: str) -> List[str]:
        return self.site_members(site_id, SITE_STAFF_ROLES)

    # Cible logique → utilisateurs (les ids inconnus sont ignorés)
    def resolve(self, target: NotificationTarget) -> List[User]:
        if target.user_id is not None:
            ids = [target.user_id]
        elif target.user_ids is not None:
            ids = list(dict.fromkeys(target.user_ids))
        elif target.site_id is not None:
            ids = self.site_members(target.site_id, [target.role] if target.role else None)
        else:
            with Session(self.engine) as s:
                ids = list(s.exec(select(User.id).where(User.role == target.role)).all())
        if not ids:
            return []
        with Session(self.engine) as s:
            users = {u.id: u for u in s.exec(select(User).where(User.id.in_(ids))).all()}
        missing = [i for i in ids if i not in users]
        if missing:
            log.info("[directory] unknown recipients skipped: %s", missing)
        return [users[i] for i in ids if i in users]

    # Jeton push refusé par la passerelle : on l'efface s'il n'a pas changé entre-temps
    def clear_push_token(self, user_id: str, token: str):
        with Session(self.engine) as s:
            s.connection().execute(
                update(User).where(User.id == user_id, User.push_token == token).values(push_token=None)
            )
            s.commit()
        log.info("[directory] removed invalid push token for user=%s", user_id)


def address_for(user: User, channel: str) -> Optional[str]:
    if channel == PUSH:
        return user.push_token
    if channel == EMAIL:
        return user.email
    if channel == SMS:
        return user.phone
    return None
