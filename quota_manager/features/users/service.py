"""
User snapshot reads.

The identity collaborator keeps user_infos current; strategies evaluate
against these snapshots. upsert_user_info is the write side used by that
sync and by tests.
"""

from typing import Iterable, List, Optional
from sqlalchemy import select, insert, update

from quota_manager.core.database import get_db_session, user_infos
from quota_manager.models.quota import as_utc
from quota_manager.models.user import UserInfo


def _row_to_user(row) -> UserInfo:
    return UserInfo(
        user_id=row.user_id,
        name=row.name,
        inviter_id=row.inviter_id,
        github_stars=row.github_stars,
        vip=row.vip or 0,
        company=row.company,
        registered_at=as_utc(row.registered_at),
        last_accessed_at=as_utc(row.last_accessed_at),
    )


def get_user_info(user_id: str) -> Optional[UserInfo]:
    with get_db_session() as session:
        row = session.execute(select(user_infos).where(user_infos.c.user_id == user_id)).first()
        return _row_to_user(row) if row else None


def load_user_snapshots(user_ids: Optional[Iterable[str]] = None) -> List[UserInfo]:
    """All user snapshots, or just the given ids, in user_id order."""
    query = select(user_infos)
    if user_ids is not None:
        query = query.where(user_infos.c.user_id.in_(list(user_ids)))
    with get_db_session() as session:
        rows = session.execute(query.order_by(user_infos.c.user_id.asc())).fetchall()
    return [_row_to_user(row) for row in rows]


def upsert_user_info(user: UserInfo) -> UserInfo:
    values = {
        "name": user.name,
        "inviter_id": user.inviter_id,
        "github_stars": ",".join(user.github_stars) or None,
        "vip": user.vip,
        "company": user.company,
        "registered_at": as_utc(user.registered_at),
        "last_accessed_at": as_utc(user.last_accessed_at),
    }
    with get_db_session() as session:
        exists = session.execute(
            select(user_infos.c.user_id).where(user_infos.c.user_id == user.user_id)
        ).first()
        if exists:
            session.execute(update(user_infos).where(user_infos.c.user_id == user.user_id).values(**values))
        else:
            session.execute(insert(user_infos).values(user_id=user.user_id, **values))
    return user
