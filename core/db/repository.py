"""
Repository Pattern for Data Access

One repository per table. Repositories take the session as an argument
and never commit; the caller owns the transaction.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from core.calculator import default_calculator_data
from core.comp_engine.models import ComparablesSelection
from core.db.base import utcnow
from core.db.models import (
    AnalysisRecord,
    CalculatorRecord,
    ComparablesRecord,
    PropertyRecord,
    RecentAnalysis,
    UserTab,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

RECENT_ANALYSES_LIMIT = 50
DEFAULT_TAB = {"id": "tab-1", "title": "Search", "propertyUPRN": None}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a client timestamp.

    Accepts datetimes, epoch milliseconds and ISO 8601 strings (a trailing
    "Z" is understood). Naive values are taken as UTC.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            parsed = datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


class BaseRepository:
    """
    Common lookups by primary key.
    """

    def __init__(self, model: Type[T]):
        self.model = model

    def get_by_id(self, session: Session, id_value: Any) -> Optional[T]:
        return session.get(self.model, id_value)

    def delete_by_id(self, session: Session, id_value: Any) -> bool:
        """
        Delete a row by primary key.

        Returns:
            True if a row was deleted
        """
        instance = session.get(self.model, id_value)
        if instance is None:
            return False
        session.delete(instance)
        session.flush()
        return True


class PropertyRepository(BaseRepository):
    """Cached property documents."""

    def __init__(self):
        super().__init__(PropertyRecord)

    def upsert(
        self,
        session: Session,
        uprn: str,
        data: Dict[str, Any],
        last_fetched: Any = None,
        fetched_count: Optional[int] = None,
    ) -> PropertyRecord:
        """
        Insert or refresh a property document.

        A refresh increments fetched_count; an insert starts it at the
        supplied count (default 1).
        """
        fetched_at = parse_timestamp(last_fetched) or utcnow()
        record = session.get(PropertyRecord, uprn)

        if record is None:
            record = PropertyRecord(
                uprn=uprn,
                data=data,
                last_fetched=fetched_at,
                fetched_count=fetched_count or 1,
            )
            session.add(record)
        else:
            record.data = data
            record.last_fetched = fetched_at
            record.fetched_count = (record.fetched_count or 0) + 1

        session.flush()
        logger.info("Saved property %s (fetched %d times)", uprn, record.fetched_count)
        return record


class CalculatorRepository(BaseRepository):
    """Investment calculator documents."""

    def __init__(self):
        super().__init__(CalculatorRecord)

    def save(self, session: Session, uprn: str, data: Dict[str, Any]) -> CalculatorRecord:
        record = session.get(CalculatorRecord, uprn)
        if record is None:
            record = CalculatorRecord(uprn=uprn, data=data)
            session.add(record)
        else:
            record.data = data
            record.last_updated = utcnow()
        session.flush()
        return record

    def reset(self, session: Session, uprn: str) -> CalculatorRecord:
        """Replace the document with a blank default one."""
        return self.save(session, uprn, default_calculator_data())


class ComparablesRepository(BaseRepository):
    """Comparables selections and their valuations."""

    def __init__(self):
        super().__init__(ComparablesRecord)

    def get_selection(self, session: Session, uprn: str) -> ComparablesSelection:
        """The stored selection, or an empty default one."""
        record = session.get(ComparablesRecord, uprn)
        if record is None:
            return ComparablesSelection(uprn=uprn)
        return record.to_selection()

    def save(self, session: Session, selection: ComparablesSelection) -> ComparablesRecord:
        record = session.get(ComparablesRecord, selection.uprn)
        if record is None:
            record = ComparablesRecord(uprn=selection.uprn)
            session.add(record)
        record.selected_comparable_ids = list(selection.selected_ids)
        record.valuation_strategy = selection.strategy.value
        record.calculated_valuation = _decimal(selection.calculated_valuation)
        record.last_updated = utcnow()
        session.flush()
        return record

    def ensure_default(self, session: Session, uprn: str) -> ComparablesRecord:
        """Create the default selection for a property if none exists."""
        record = session.get(ComparablesRecord, uprn)
        if record is None:
            record = self.save(session, ComparablesSelection(uprn=uprn))
            logger.debug("Created default comparables data for %s", uprn)
        return record


ANALYSIS_FIELDS = {
    "searchAddress": "search_address",
    "searchPostcode": "search_postcode",
    "timestamp": "timestamp",
    "selectedComparables": "selected_comparables",
    "calculatedValuation": "calculated_valuation",
    "valuationBasedOnComparables": "valuation_based_on_comparables",
    "lastValuationUpdate": "last_valuation_update",
    "calculatedRent": "calculated_rent",
    "rentBasedOnComparables": "rent_based_on_comparables",
    "lastRentUpdate": "last_rent_update",
    "calculatedYield": "calculated_yield",
    "lastYieldUpdate": "last_yield_update",
    "filters": "filters",
}

_TIMESTAMP_COLUMNS = {"timestamp", "last_valuation_update", "last_rent_update", "last_yield_update"}
_DECIMAL_COLUMNS = {"calculated_valuation", "calculated_rent", "calculated_yield"}


class AnalysisRepository(BaseRepository):
    """Saved analyses and the recent-analyses list."""

    def __init__(self):
        super().__init__(AnalysisRecord)

    def save(
        self,
        session: Session,
        analysis_id: str,
        uprn: str,
        fields: Dict[str, Any],
    ) -> AnalysisRecord:
        """
        Insert or update an analysis and move it to the top of the recent list.

        Args:
            analysis_id: Client-issued analysis id
            uprn: Property UPRN (fixed once created)
            fields: camelCase fields as sent by the dashboard

        Raises:
            ValueError: If a timestamp field cannot be parsed
        """
        values: Dict[str, Any] = {}
        for key, column in ANALYSIS_FIELDS.items():
            value = fields.get(key)
            if column in _TIMESTAMP_COLUMNS:
                value = parse_timestamp(value)
            elif column in _DECIMAL_COLUMNS:
                value = _decimal(value)
            values[column] = value
        values["selected_comparables"] = values["selected_comparables"] or []
        values["filters"] = values["filters"] or {}

        record = session.get(AnalysisRecord, analysis_id)
        if record is None:
            record = AnalysisRecord(analysis_id=analysis_id, uprn=uprn, **values)
            session.add(record)
        else:
            for column, value in values.items():
                setattr(record, column, value)
        session.flush()

        self._touch_recent(session, analysis_id, values["timestamp"] or utcnow())
        return record

    def _touch_recent(self, session: Session, analysis_id: str, timestamp: datetime) -> None:
        session.execute(delete(RecentAnalysis).where(RecentAnalysis.analysis_id == analysis_id))
        session.add(RecentAnalysis(analysis_id=analysis_id, timestamp=timestamp))
        session.flush()

        keep = select(RecentAnalysis.id).order_by(
            RecentAnalysis.timestamp.desc(), RecentAnalysis.id.desc()
        ).limit(RECENT_ANALYSES_LIMIT)
        session.execute(
            delete(RecentAnalysis).where(RecentAnalysis.id.not_in(keep)),
            execution_options={"synchronize_session": False},
        )

    def recent(self, session: Session, limit: int = RECENT_ANALYSES_LIMIT) -> List[RecentAnalysis]:
        """Recent analyses, newest first."""
        query = select(RecentAnalysis).order_by(
            RecentAnalysis.timestamp.desc(), RecentAnalysis.id.desc()
        ).limit(min(limit, RECENT_ANALYSES_LIMIT))
        return list(session.execute(query).scalars().all())

    def delete(self, session: Session, analysis_id: str) -> bool:
        """
        Delete an analysis.

        When no other analysis refers to the same property, its comparables
        selection and calculator document are deleted with it.

        Returns:
            True if the analysis existed
        """
        record = session.get(AnalysisRecord, analysis_id)
        session.execute(delete(RecentAnalysis).where(RecentAnalysis.analysis_id == analysis_id))
        if record is None:
            return False

        uprn = record.uprn
        session.delete(record)
        session.flush()

        remaining = session.execute(
            select(func.count()).select_from(AnalysisRecord).where(AnalysisRecord.uprn == uprn)
        ).scalar_one()
        if remaining == 0:
            session.execute(delete(ComparablesRecord).where(ComparablesRecord.uprn == uprn))
            session.execute(delete(CalculatorRecord).where(CalculatorRecord.uprn == uprn))
            logger.info("Deleted analysis %s and data for property %s", analysis_id, uprn)
        else:
            logger.info("Deleted analysis %s", analysis_id)
        return True


class LastTabError(ValueError):
    """Attempt to delete a user's only tab."""


class TabRepository:
    """Dashboard tabs per user."""

    def for_user(self, session: Session, user_id: str) -> List[UserTab]:
        query = (
            select(UserTab)
            .where(UserTab.user_id == user_id)
            .order_by(UserTab.created_at.asc(), UserTab.id.asc())
        )
        return list(session.execute(query).scalars().all())

    def state(self, session: Session, user_id: str) -> Dict[str, Any]:
        """
        Tabs in the dashboard's shape.

        A user with no saved tabs gets the single default search tab.
        """
        rows = self.for_user(session, user_id)
        if not rows:
            return {"tabs": [dict(DEFAULT_TAB)], "activeTabId": DEFAULT_TAB["id"], "lastUpdated": None}

        active = next((row for row in rows if row.is_active), rows[0])
        return {
            "tabs": [row.to_dict() for row in rows],
            "activeTabId": active.tab_id,
            "lastUpdated": rows[0].last_updated.isoformat(),
        }

    def sync(
        self,
        session: Session,
        user_id: str,
        tabs: Sequence[Dict[str, Any]],
        active_tab_id: Optional[str],
    ) -> Dict[str, Any]:
        """
        Make the stored tabs match the given list.

        Tabs missing from the list are deleted; the rest are upserted and
        only active_tab_id is marked active.

        Raises:
            ValueError: If a tab has no id
        """
        wanted_ids = []
        for tab in tabs:
            tab_id = tab.get("id")
            if not tab_id:
                raise ValueError("Each tab requires an id")
            wanted_ids.append(str(tab_id))

        existing = {row.tab_id: row for row in self.for_user(session, user_id)}
        for tab_id, row in existing.items():
            if tab_id not in wanted_ids:
                session.delete(row)

        for tab, tab_id in zip(tabs, wanted_ids):
            row = existing.get(tab_id)
            if row is None:
                row = UserTab(user_id=user_id, tab_id=tab_id)
                session.add(row)
            row.title = tab.get("title") or "Search"
            row.property_uprn = tab.get("propertyUPRN") or None
            row.is_active = tab_id == active_tab_id
            row.last_updated = utcnow()
            # Keep list order stable for tabs created in the same sync
            session.flush()

        session.flush()
        return self.state(session, user_id)

    def delete(self, session: Session, user_id: str, tab_id: str) -> bool:
        """
        Delete one tab.

        Raises:
            LastTabError: If the user has at most one tab
        """
        count = session.execute(
            select(func.count()).select_from(UserTab).where(UserTab.user_id == user_id)
        ).scalar_one()
        if count <= 1:
            raise LastTabError("Cannot delete the last tab")

        result = session.execute(
            delete(UserTab).where(UserTab.user_id == user_id, UserTab.tab_id == tab_id)
        )
        return result.rowcount > 0
