"""MindfulAI — Upsert Layer.

Insert-or-update keyed by vendor IDs using the dialect's native
`INSERT .. ON CONFLICT DO UPDATE`. Re-running a sync overwrites the previous
snapshot rather than duplicating it.
"""

from typing import Any, Dict, Iterable, Optional, Sequence, Type

from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, SQLModel

from app.config import settings
from app.core.logging import get_logger
from app.core.rate_limit import RateLimitUsage
from app.models.job_models import MetaApiMetric, MetaRateLimit
from app.models.meta_models import utcnow

logger = get_logger("store")

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

# Never overwritten by an upsert
_PRESERVED_COLUMNS = ("created_at",)


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    try:
        return _INSERTS[dialect]
    except KeyError:
        raise ValueError(f"Upsert not supported for dialect '{dialect}'") from None


def upsert_rows(
    session: Session,
    model: Type[SQLModel],
    rows: Iterable[Dict[str, Any]],
    conflict_columns: Sequence[str],
) -> int:
    """Insert rows, updating every non-key column when the key exists.

    Unknown keys are dropped. `last_updated` / `updated_at` are stamped with
    the current time. Returns the number of rows written.
    """
    insert = _insert_for(session)
    table = model.__table__
    now = utcnow()
    written = 0

    try:
        for row in rows:
            values = {k: v for k, v in row.items() if k in table.c}
            for stamp in ("last_updated", "updated_at", "created_at"):
                if stamp in table.c:
                    values.setdefault(stamp, now)

            stmt = insert(table).values(**values)
            update_cols = {
                name: stmt.excluded[name]
                for name in values
                if name not in conflict_columns and name not in _PRESERVED_COLUMNS
            }
            if update_cols:
                stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=update_cols)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
            session.execute(stmt)
            written += 1
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.debug(f"Upserted {written} rows into {table.name}")
    return written


def upsert_row(
    session: Session, model: Type[SQLModel], row: Dict[str, Any], conflict_columns: Sequence[str]
) -> int:
    return upsert_rows(session, model, [row], conflict_columns)


# ── Observability rows (never fail the sync) ──


def record_api_metric(
    session: Session,
    account_id: str,
    endpoint: str,
    call_type: str = "READ",
    points: int = 1,
    success: bool = True,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    try:
        session.add(
            MetaApiMetric(
                account_id=account_id or "",
                endpoint=endpoint,
                call_type=call_type,
                points_used=points,
                success=success,
                error_code=error_code,
                error_message=(error_message or "")[:1000] or None,
            )
        )
        session.commit()
    except Exception as e:
        session.rollback()
        logger.warning(f"Failed to record API metric for {endpoint}: {e}")


def record_rate_limit(
    session: Session,
    account_id: str,
    endpoint: str,
    usage: RateLimitUsage,
    tier: Optional[str] = None,
) -> None:
    row = {
        "account_id": account_id or "",
        "endpoint": endpoint,
        "usage_percent": usage.usage_percent,
        "call_count": usage.call_count,
        "total_cputime": usage.total_cputime,
        "total_time": usage.total_time,
        "estimated_time_to_regain_access": usage.estimated_time_to_regain_access,
        "business_use_case": usage.business_use_case,
        "reset_time_duration": usage.reset_time_duration,
        "tier": tier or settings.meta_api_tier,
    }
    try:
        upsert_row(session, MetaRateLimit, row, ("account_id", "endpoint"))
    except Exception as e:
        logger.warning(f"Failed to record rate limit for {endpoint}: {e}")


class ApiObserver:
    """Binds a session to the client's metrics / usage recorder hooks."""

    def __init__(self, session: Session):
        self.session = session
        self.call_count = 0

    def record_call(self, **call: Any) -> None:
        self.call_count += 1
        record_api_metric(
            self.session,
            account_id=call.get("account_id", ""),
            endpoint=call["endpoint"],
            call_type=call.get("call_type", "READ"),
            points=call.get("points", 1),
            success=call.get("success", True),
            error_code=call.get("error_code"),
            error_message=call.get("error_message"),
        )

    def record_usage(self, account_id: str, endpoint: str, usage: RateLimitUsage) -> None:
        record_rate_limit(self.session, account_id, endpoint, usage)
