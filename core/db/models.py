"""
SQLAlchemy ORM Models

One table per persisted document. Properties, calculator documents and
comparables selections are keyed by UPRN; analyses by their client-issued
id; tabs by (user, tab id).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from core.comp_engine.models import ComparablesSelection, ValuationStrategy
from core.db.base import Base, JSONType, TimestampMixin, utcnow


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


class PropertyRecord(Base, TimestampMixin):
    """
    Cached property document as fetched from the property data provider.
    """
    __tablename__ = "properties"

    uprn: Mapped[str] = mapped_column(String(50), primary_key=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    last_fetched: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    fetched_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("idx_properties_last_fetched", "last_fetched"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uprn": self.uprn,
            "data": self.data,
            "lastFetched": _iso(self.last_fetched),
            "fetchedCount": self.fetched_count,
        }


class CalculatorRecord(Base):
    """
    Investment calculator document for a property.
    """
    __tablename__ = "calculator_data"

    uprn: Mapped[str] = mapped_column(String(50), primary_key=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "lastUpdated": _iso(self.last_updated)}


class ComparablesRecord(Base):
    """
    Selected comparables, valuation strategy and last valuation for a property.
    """
    __tablename__ = "comparables_data"

    uprn: Mapped[str] = mapped_column(String(50), primary_key=True)
    selected_comparable_ids: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    valuation_strategy: Mapped[str] = mapped_column(
        String(20), default=ValuationStrategy.AVERAGE.value, nullable=False
    )
    calculated_valuation: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "valuation_strategy IN ('average', 'price_per_sqm')",
            name="ck_comparables_data_strategy",
        ),
    )

    def to_selection(self) -> ComparablesSelection:
        return ComparablesSelection(
            uprn=self.uprn,
            selected_ids=list(self.selected_comparable_ids or []),
            strategy=ValuationStrategy(self.valuation_strategy),
            calculated_valuation=_float(self.calculated_valuation),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = self.to_selection().to_dict()
        result["last_updated"] = _iso(self.last_updated)
        result["created_at"] = _iso(self.created_at)
        return result


class AnalysisRecord(Base, TimestampMixin):
    """
    A saved analysis of a property: search, selections and headline figures.
    """
    __tablename__ = "user_analyses"

    analysis_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    uprn: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    search_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    search_postcode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    selected_comparables: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    calculated_valuation: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    valuation_based_on_comparables: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_valuation_update: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    calculated_rent: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    rent_based_on_comparables: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_rent_update: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    calculated_yield: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4), nullable=True)
    last_yield_update: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    filters: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysisId": self.analysis_id,
            "uprn": self.uprn,
            "searchAddress": self.search_address,
            "searchPostcode": self.search_postcode,
            "timestamp": _iso(self.timestamp),
            "selectedComparables": self.selected_comparables or [],
            "calculatedValuation": _float(self.calculated_valuation),
            "valuationBasedOnComparables": self.valuation_based_on_comparables,
            "lastValuationUpdate": _iso(self.last_valuation_update),
            "calculatedRent": _float(self.calculated_rent),
            "rentBasedOnComparables": self.rent_based_on_comparables,
            "lastRentUpdate": _iso(self.last_rent_update),
            "calculatedYield": _float(self.calculated_yield),
            "lastYieldUpdate": _iso(self.last_yield_update),
            "filters": self.filters or {},
        }


class RecentAnalysis(Base):
    """
    Most-recently-used list of analyses (capped).
    """
    __tablename__ = "recent_analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    analysis_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("user_analyses.analysis_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    def to_dict(self) -> Dict[str, Any]:
        return {"analysis_id": self.analysis_id, "timestamp": _iso(self.timestamp)}


class UserTab(Base):
    """
    An open dashboard tab for a user.
    """
    __tablename__ = "user_tabs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tab_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="Search", nullable=False)
    property_uprn: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "tab_id", name="uq_user_tabs_user_tab"),
        Index("idx_user_tabs_user_active", "user_id", "is_active"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.tab_id,
            "title": self.title,
            "propertyUPRN": self.property_uprn or None,
        }
