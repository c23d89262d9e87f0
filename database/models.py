"""SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PositionRow(Base):
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True)
    position_id = Column(String, unique=True, nullable=False, index=True)
    book = Column(String, default="live", nullable=False, index=True)
    token_address = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    status = Column(String, default="OPEN", nullable=False, index=True)
    entry_price = Column(Float, nullable=False)
    entry_amount = Column(Float, nullable=False)
    remaining_amount = Column(Float, nullable=False)
    conviction = Column(Float, default=0.0, nullable=False)
    entry_tier = Column(String, nullable=True)
    stop_price = Column(Float, nullable=True)
    stop_kind = Column(String, default="fixed", nullable=False)
    tp_hits = Column(JSON, default=list, nullable=False)
    state = Column(JSON, nullable=False)  # full Position snapshot
    opened_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TradeRow(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True)
    trade_id = Column(String, unique=True, nullable=False, index=True)
    position_id = Column(String, nullable=False, index=True)
    book = Column(String, default="live", nullable=False, index=True)
    token_address = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    entry_price = Column(Float, nullable=False)
    exit_price = Column(Float, nullable=False)
    amount = Column(Float, nullable=False)
    entry_time = Column(DateTime, nullable=False)
    exit_time = Column(DateTime, nullable=False, index=True)
    exit_reason = Column(String, nullable=False)
    outcome = Column(String, nullable=False, index=True)
    pnl_usd = Column(Float, nullable=False)
    pnl_native = Column(Float, default=0.0, nullable=False)
    pnl_percent = Column(Float, nullable=False)
    conviction = Column(Float, default=0.0, nullable=False)
    category_scores = Column(JSON, default=dict, nullable=False)
    features = Column(JSON, default=dict, nullable=False)


class OpportunityRow(Base):
    __tablename__ = "opportunities"

    id = Column(Integer, primary_key=True)
    opportunity_id = Column(String, unique=True, nullable=False, index=True)
    token_address = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    reason = Column(String, nullable=True)
    reason_code = Column(String, nullable=True)
    conviction = Column(Float, default=0.0, nullable=False)
    safety_score = Column(Integer, nullable=True)
    snapshot = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)


class LearningWeightRow(Base):
    __tablename__ = "learning_weights"

    id = Column(Integer, primary_key=True)
    category = Column(String, unique=True, nullable=False)
    weight = Column(Float, nullable=False)
    default_weight = Column(Float, nullable=False)
    locked = Column(Boolean, default=False, nullable=False)
    predictive_power = Column(Float, default=0.0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class LearningSnapshotRow(Base):
    __tablename__ = "learning_snapshots"

    id = Column(Integer, primary_key=True)
    batch_number = Column(Integer, nullable=False)
    mode = Column(String, nullable=False)
    trade_count = Column(Integer, nullable=False)
    weights_before = Column(JSON, nullable=False)
    weights_after = Column(JSON, nullable=False)
    correlations = Column(JSON, nullable=False)
    applied = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PatternRow(Base):
    __tablename__ = "patterns"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)  # win/danger
    key = Column(String, nullable=False)
    features = Column(JSON, nullable=False)
    occurrences = Column(Integer, nullable=False)
    win_rate = Column(Float, nullable=False)
    avg_return_percent = Column(Float, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class BlacklistRow(Base):
    __tablename__ = "blacklist"
    __table_args__ = (UniqueConstraint("address", "kind", name="uq_blacklist_address_kind"),)

    id = Column(Integer, primary_key=True)
    address = Column(String, nullable=False, index=True)
    kind = Column(String, default="token", nullable=False)  # token/deployer/wallet
    reason = Column(String, nullable=True)
    added_by = Column(String, nullable=True)
    added_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)


class SmartWalletRow(Base):
    __tablename__ = "smart_wallets"

    id = Column(Integer, primary_key=True)
    address = Column(String, unique=True, nullable=False, index=True)
    tier = Column(Integer, default=2, nullable=False)
    label = Column(String, nullable=True)
    score = Column(Float, default=50.0, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    added_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AuditLogRow(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    entry_id = Column(String, unique=True, nullable=False)
    action = Column(String, nullable=False, index=True)
    actor = Column(String, nullable=False)
    status = Column(String, nullable=False)
    details = Column(JSON, nullable=False)
    checksum = Column(String(64), nullable=False)
    timestamp = Column(String, nullable=False)  # ISO string, part of the checksum
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
