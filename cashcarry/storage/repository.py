"""
Hedge event journal.

Every terminal hedge result, audit finding, oracle decision and strategy
cycle is written here as a JSON document keyed by event type and instrument.
"""
import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.exc import SQLAlchemyError

from cashcarry.monitoring.logger import get_logger
from cashcarry.storage.db import Base, get_db

logger = get_logger(__name__)


class HedgeEventModel(Base):
    """ORM model for hedge events (audit trail)."""
    __tablename__ = "hedge_events"
    __table_args__ = (
        Index("idx_hedge_event_type_time", "event_type", "timestamp"),
        Index("idx_hedge_event_inst", "inst_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, nullable=False)
    event_type = Column(String(64), nullable=False)
    inst_id = Column(String(64), nullable=False)
    details = Column(Text, nullable=False)  # JSON string


def _json_default(obj):
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "value"):  # Enum
        return obj.value
    raise TypeError(f"Not serializable: {type(obj).__name__}")


def record_event(
    event_type: str,
    inst_id: str,
    details: Dict,
    timestamp: Optional[datetime] = None,
) -> None:
    """
    Record a hedge event (synchronous).

    Journal failures are logged, never raised: the journal observes hedge
    handling and must not change its outcome.
    """
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    details_json = json.dumps(details, default=_json_default)

    try:
        db = get_db()
        with db.get_session() as session:
            session.add(HedgeEventModel(
                timestamp=timestamp.replace(tzinfo=None),
                event_type=event_type,
                inst_id=inst_id,
                details=details_json,
            ))
    except SQLAlchemyError as e:
        logger.error("Event journal write failed", event_type=event_type, inst_id=inst_id, error=str(e))


async def async_record_event(
    event_type: str,
    inst_id: str,
    details: Dict,
    timestamp: Optional[datetime] = None,
) -> None:
    """Record a hedge event without blocking the event loop."""
    await asyncio.to_thread(record_event, event_type, inst_id, details, timestamp)


def get_recent_events(limit: int = 50, event_type: Optional[str] = None, inst_id: Optional[str] = None) -> List[Dict]:
    """Most recent events first."""
    db = get_db()
    with db.get_session() as session:
        query = session.query(HedgeEventModel)
        if event_type:
            query = query.filter(HedgeEventModel.event_type == event_type)
        if inst_id:
            query = query.filter(HedgeEventModel.inst_id == inst_id)
        events = query.order_by(HedgeEventModel.timestamp.desc(), HedgeEventModel.id.desc()).limit(limit).all()
        return [
            {
                "id": e.id,
                "timestamp": e.timestamp.replace(tzinfo=timezone.utc).isoformat(),
                "type": e.event_type,
                "inst_id": e.inst_id,
                "details": json.loads(e.details),
            }
            for e in events
        ]
