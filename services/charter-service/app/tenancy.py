from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from .models import Base
from .security import get_principal

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./charter.db")

logger = logging.getLogger(__name__)


@lru_cache(maxsize=8)
def engine_for(url: str) -> Engine:
    eng = create_engine(url, pool_pre_ping=True)
    Base.metadata.create_all(eng)
    _ensure_schema(eng)
    return eng


def _ensure_schema(engine: Engine) -> None:
    """
    Lightweight migration shim.

    `create_all()` will not add columns to existing tables. Columns added
    after the first release are listed here and added when missing.
    """
    dialect = (engine.dialect.name or "").lower()
    if dialect not in {"sqlite", "postgresql"}:
        return

    bookings_add: dict[str, str] = {
        "source": "VARCHAR",
        "package_addon_cost": "FLOAT",
        "fuel_cost": "FLOAT",
    }

    try:
        with engine.begin() as conn:
            if dialect == "sqlite":
                cols = conn.exec_driver_sql("PRAGMA table_info(bookings);").fetchall()
                names = {r[1] for r in cols}  # (cid, name, type, notnull, dflt_value, pk)
                for col, ddl in bookings_add.items():
                    if col not in names:
                        conn.exec_driver_sql(f"ALTER TABLE bookings ADD COLUMN {col} {ddl};")
            else:
                for col, ddl in bookings_add.items():
                    conn.exec_driver_sql(f"ALTER TABLE bookings ADD COLUMN IF NOT EXISTS {col} {ddl};")
    except Exception as e:
        # create_all covers fresh installs; an old database keeps working without the new columns.
        logger.warning("Schema update failed: %s", e)


def get_engine() -> Engine:
    return engine_for(DATABASE_URL)


def get_company_id(
    principal: Annotated[dict, Depends(get_principal)],
    x_company_id: Annotated[str | None, Header()] = None,
) -> str:
    """
    Tenant of the current request.

    Taken from the token's `company_id` claim. The X-Company-Id header is
    accepted for tokens without the claim and must agree with it otherwise.
    """
    claimed = (principal.get("company_id") or "").strip()
    header = (x_company_id or "").strip()
    if claimed and header and claimed != header:
        raise HTTPException(status_code=403, detail="Token is not valid for this company")
    company_id = claimed or header
    if not company_id:
        raise HTTPException(status_code=400, detail="Missing company (token claim or X-Company-Id header)")
    return company_id
