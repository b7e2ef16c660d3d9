"""
PPC Optimizer: database models.
Campaign history, keywords and search terms feed the analytics services;
recommendations are the only rows the services write back.
"""

import uuid
import datetime as dt
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ppc_optimizer.database import Base
from ppc_optimizer.schemas import Priority, RecommendationStatus
from ppc_optimizer.utils import utcnow


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    """Campaign synced from the advertising platform."""
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="ENABLED")
    daily_budget: Mapped[float] = mapped_column(Float, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)

    metrics: Mapped[list["CampaignMetric"]] = relationship(
        "CampaignMetric", back_populates="campaign", cascade="all, delete-orphan"
    )
    keywords: Mapped[list["Keyword"]] = relationship(
        "Keyword", back_populates="campaign", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_campaigns_account_id", "account_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  DAILY METRICS: one row per campaign per day
# ══════════════════════════════════════════════════════════════════════

class CampaignMetric(Base):
    __tablename__ = "campaign_metrics"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[str] = mapped_column(String(255), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    conversions: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_value: Mapped[float] = mapped_column(Float, default=0.0)
    synced_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)

    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="metrics")

    __table_args__ = (
        UniqueConstraint("campaign_id", "date", name="uq_campaign_metric_day"),
        Index("ix_campaign_metrics_campaign_date", "campaign_id", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  KEYWORDS
# ══════════════════════════════════════════════════════════════════════

class Keyword(Base):
    """Keyword with its delivery totals over the reporting window."""
    __tablename__ = "keywords"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    campaign_id: Mapped[str] = mapped_column(String(255), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    match_type: Mapped[str] = mapped_column(String(50), nullable=True)  # BROAD, PHRASE, EXACT
    status: Mapped[str] = mapped_column(String(50), default="ENABLED")
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    conversions: Mapped[float] = mapped_column(Float, default=0.0)

    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="keywords")

    __table_args__ = (
        Index("ix_keywords_campaign_id", "campaign_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SEARCH TERM PERFORMANCE
# ══════════════════════════════════════════════════════════════════════

class SearchTermPerformance(Base):
    """One row per (campaign, search term, day)."""
    __tablename__ = "search_term_performance"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[str] = mapped_column(String(255), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    search_term: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    conversions: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_value: Mapped[float] = mapped_column(Float, default=0.0)

    __table_args__ = (
        Index("ix_stp_campaign_date", "campaign_id", "date"),
        Index("ix_stp_search_term", "search_term"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RECOMMENDATIONS
# ══════════════════════════════════════════════════════════════════════

class Recommendation(Base):
    __tablename__ = "recommendations"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=lambda: str(uuid.uuid4()))
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(255), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    proposed_change: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), default=RecommendationStatus.PENDING.value)
    priority: Mapped[str] = mapped_column(String(20), default=Priority.MEDIUM.value)
    estimated_impact: Mapped[float] = mapped_column(Float, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=True)
    valid_until: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    # Apply outcome written by the implementation queue
    implemented_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    implemented_by: Mapped[str] = mapped_column(String(255), nullable=True)
    rollback_snapshot: Mapped[dict] = mapped_column(JSON, nullable=True)
    apply_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, nullable=True)
    last_error_code: Mapped[str] = mapped_column(String(50), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_recommendations_campaign_id", "campaign_id"),
        Index("ix_recommendations_status", "status"),
    )
