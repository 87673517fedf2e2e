from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_sync.db.models import UserMapping


def list_active_mappings(db: Session) -> list[UserMapping]:
    return list(
        db.scalars(
            select(UserMapping)
            .where(UserMapping.is_active.is_(True))
            .order_by(UserMapping.steve_ocpp_id_tag)
        )
    )
