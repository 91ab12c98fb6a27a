from __future__ import annotations

from typing import Any

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.db.models import RuntimePreference


def get_runtime_preference(db: Session, *, key: str) -> RuntimePreference | None:
    return db.get(RuntimePreference, key)


def upsert_runtime_preference(db: Session, *, key: str, value_json: Any) -> RuntimePreference:
    statement = insert(RuntimePreference).values(key=key, value_json=value_json)
    statement = statement.on_conflict_do_update(
        index_elements=[RuntimePreference.key],
        set_={"value_json": statement.excluded.value_json, "updated_at": func.now()},
    )
    db.execute(statement)
    db.commit()
    preference = db.get(RuntimePreference, key, populate_existing=True)
    if preference is None:
        raise RuntimeError(f"failed to upsert runtime preference {key}")
    return preference
