"""Database helpers and persistence operations for the trading core."""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from database.models import (
    AuditLogRow,
    Base,
    BlacklistRow,
    LearningSnapshotRow,
    LearningWeightRow,
    OpportunityRow,
    PatternRow,
    PositionRow,
    SmartWalletRow,
    TradeRow,
)


def _make_engine(url: str):
    if url.startswith("sqlite") and (url in ("sqlite://", "sqlite:///:memory:")):
        # In-memory sqlite must share one connection across sessions and threads.
        return create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, future=True)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def configure(url: str) -> None:
    """Rebind the module engine, e.g. to `sqlite://` in tests."""
    global engine, SessionLocal
    engine.dispose()
    engine = _make_engine(url)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def get_db() -> Session:
    return SessionLocal()


def _as_dt(value: Any) -> Optional[datetime]:
    """Store naive UTC datetimes; accept aware datetimes, ISO strings and epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def save_position(row: dict[str, Any]) -> None:
    db = get_db()
    try:
        rec = db.query(PositionRow).filter(PositionRow.position_id == row["position_id"]).first()
        if rec is None:
            rec = PositionRow(position_id=row["position_id"], opened_at=_as_dt(row.get("entry_time")) or datetime.utcnow())
            db.add(rec)
        rec.book = str(row.get("book", "live"))
        rec.token_address = str(row["token_address"])
        rec.symbol = row.get("symbol")
        rec.status = str(row.get("status", "OPEN"))
        rec.entry_price = float(row["entry_price"])
        rec.entry_amount = float(row["entry_amount"])
        rec.remaining_amount = float(row["remaining_amount"])
        rec.conviction = float(row.get("conviction", 0.0) or 0.0)
        rec.entry_tier = row.get("entry_tier")
        rec.stop_price = row.get("stop_price")
        rec.stop_kind = str(row.get("stop_kind", "fixed"))
        rec.tp_hits = list(row.get("tp_hits") or [])
        rec.state = dict(row)
        rec.updated_at = datetime.utcnow()
        db.commit()
    finally:
        db.close()


def load_positions(book: str, statuses: Iterable[str] = ("OPEN", "CLOSING")) -> list[dict[str, Any]]:
    db = get_db()
    try:
        rows = (
            db.query(PositionRow)
            .filter(PositionRow.book == book, PositionRow.status.in_(list(statuses)))
            .order_by(PositionRow.opened_at.asc())
            .all()
        )
        return [dict(r.state or {}) for r in rows]
    finally:
        db.close()


def record_trade(row: dict[str, Any]) -> None:
    db = get_db()
    try:
        if db.query(TradeRow).filter(TradeRow.trade_id == row["trade_id"]).first():
            return
        db.add(
            TradeRow(
                trade_id=row["trade_id"],
                position_id=row["position_id"],
                book=str(row.get("book", "live")),
                token_address=row["token_address"],
                symbol=row.get("symbol"),
                entry_price=float(row["entry_price"]),
                exit_price=float(row["exit_price"]),
                amount=float(row["amount"]),
                entry_time=_as_dt(row["entry_time"]),
                exit_time=_as_dt(row["exit_time"]),
                exit_reason=str(row["exit_reason"]),
                outcome=str(row["outcome"]),
                pnl_usd=float(row["pnl_usd"]),
                pnl_native=float(row.get("pnl_native", 0.0) or 0.0),
                pnl_percent=float(row["pnl_percent"]),
                conviction=float(row.get("conviction", 0.0) or 0.0),
                category_scores=dict(row.get("category_scores") or {}),
                features=dict(row.get("features") or {}),
            )
        )
        db.commit()
    finally:
        db.close()


def list_trades(book: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
    db = get_db()
    try:
        query = db.query(TradeRow)
        if book:
            query = query.filter(TradeRow.book == book)
        rows = query.order_by(TradeRow.exit_time.desc()).limit(max(1, int(limit))).all()
        return [
            {
                "trade_id": r.trade_id,
                "position_id": r.position_id,
                "book": r.book,
                "token_address": r.token_address,
                "symbol": r.symbol,
                "entry_price": r.entry_price,
                "exit_price": r.exit_price,
                "amount": r.amount,
                "entry_time": _iso(r.entry_time),
                "exit_time": _iso(r.exit_time),
                "exit_reason": r.exit_reason,
                "outcome": r.outcome,
                "pnl_usd": r.pnl_usd,
                "pnl_native": r.pnl_native,
                "pnl_percent": r.pnl_percent,
                "conviction": r.conviction,
                "category_scores": dict(r.category_scores or {}),
                "features": dict(r.features or {}),
            }
            for r in rows
        ]
    finally:
        db.close()


def save_opportunity(row: dict[str, Any]) -> None:
    db = get_db()
    try:
        rec = db.query(OpportunityRow).filter(OpportunityRow.opportunity_id == row["opportunity_id"]).first()
        if rec is None:
            rec = OpportunityRow(opportunity_id=row["opportunity_id"], created_at=_as_dt(row.get("created_at")) or datetime.utcnow())
            db.add(rec)
        rec.token_address = row["token_address"]
        rec.symbol = row.get("symbol")
        rec.status = str(row["status"])
        rec.reason = row.get("reason")
        rec.reason_code = row.get("reason_code")
        rec.conviction = float(row.get("conviction", 0.0) or 0.0)
        safety = row.get("safety") or {}
        rec.safety_score = int(safety["score"]) if "score" in safety else None
        rec.snapshot = dict(row)
        rec.resolved_at = _as_dt(row.get("resolved_at"))
        db.commit()
    finally:
        db.close()


def list_opportunities(limit: int = 100) -> list[dict[str, Any]]:
    db = get_db()
    try:
        rows = db.query(OpportunityRow).order_by(OpportunityRow.created_at.desc()).limit(max(1, int(limit))).all()
        return [dict(r.snapshot or {}) for r in rows]
    finally:
        db.close()


def save_weights(rows: Iterable[dict[str, Any]]) -> None:
    db = get_db()
    try:
        for row in rows:
            rec = db.query(LearningWeightRow).filter(LearningWeightRow.category == row["name"]).first()
            if rec is None:
                rec = LearningWeightRow(category=row["name"])
                db.add(rec)
            rec.weight = float(row["weight"])
            rec.default_weight = float(row["default"])
            rec.locked = bool(row.get("locked", False))
            rec.predictive_power = float(row.get("predictive_power", 0.0) or 0.0)
            rec.updated_at = datetime.utcnow()
        db.commit()
    finally:
        db.close()


def load_weights() -> list[dict[str, Any]]:
    db = get_db()
    try:
        return [
            {
                "name": r.category,
                "weight": r.weight,
                "default": r.default_weight,
                "locked": r.locked,
                "predictive_power": r.predictive_power,
            }
            for r in db.query(LearningWeightRow).all()
        ]
    finally:
        db.close()


def save_learning_snapshot(row: dict[str, Any]) -> None:
    db = get_db()
    try:
        db.add(
            LearningSnapshotRow(
                batch_number=int(row["batch_number"]),
                mode=str(row["mode"]),
                trade_count=int(row["trade_count"]),
                weights_before=dict(row["weights_before"]),
                weights_after=dict(row["weights_after"]),
                correlations=dict(row["correlations"]),
                applied=bool(row.get("applied", False)),
            )
        )
        db.commit()
    finally:
        db.close()


def replace_patterns(kind: str, rows: Iterable[dict[str, Any]]) -> None:
    db = get_db()
    try:
        db.query(PatternRow).filter(PatternRow.kind == kind).delete()
        for row in rows:
            db.add(
                PatternRow(
                    kind=kind,
                    key=str(row["key"]),
                    features=dict(row["features"]),
                    occurrences=int(row["occurrences"]),
                    win_rate=float(row["win_rate"]),
                    avg_return_percent=float(row["avg_return_percent"]),
                )
            )
        db.commit()
    finally:
        db.close()


def list_patterns(kind: str) -> list[dict[str, Any]]:
    db = get_db()
    try:
        rows = db.query(PatternRow).filter(PatternRow.kind == kind).order_by(PatternRow.occurrences.desc()).all()
        return [
            {
                "key": r.key,
                "features": dict(r.features or {}),
                "occurrences": r.occurrences,
                "win_rate": r.win_rate,
                "avg_return_percent": r.avg_return_percent,
            }
            for r in rows
        ]
    finally:
        db.close()


def upsert_blacklist(row: dict[str, Any]) -> None:
    db = get_db()
    try:
        rec = (
            db.query(BlacklistRow)
            .filter(BlacklistRow.address == row["address"], BlacklistRow.kind == row.get("kind", "token"))
            .first()
        )
        if rec is None:
            rec = BlacklistRow(address=row["address"], kind=row.get("kind", "token"))
            db.add(rec)
        rec.reason = row.get("reason")
        rec.added_by = row.get("added_by")
        rec.added_at = _as_dt(row.get("added_at")) or datetime.utcnow()
        rec.expires_at = _as_dt(row.get("expires_at"))
        db.commit()
    finally:
        db.close()


def remove_blacklist(address: str, kind: str = "token") -> bool:
    db = get_db()
    try:
        deleted = db.query(BlacklistRow).filter(BlacklistRow.address == address, BlacklistRow.kind == kind).delete()
        db.commit()
        return bool(deleted)
    finally:
        db.close()


def load_blacklist() -> list[dict[str, Any]]:
    db = get_db()
    try:
        return [
            {
                "address": r.address,
                "kind": r.kind,
                "reason": r.reason,
                "added_by": r.added_by,
                "added_at": _iso(r.added_at),
                "expires_at": _iso(r.expires_at),
            }
            for r in db.query(BlacklistRow).all()
        ]
    finally:
        db.close()


def save_wallet(row: dict[str, Any]) -> None:
    db = get_db()
    try:
        rec = db.query(SmartWalletRow).filter(SmartWalletRow.address == row["address"]).first()
        if rec is None:
            rec = SmartWalletRow(address=row["address"], added_at=_as_dt(row.get("added_at")) or datetime.utcnow())
            db.add(rec)
        rec.tier = int(row.get("tier", 2))
        rec.label = row.get("label")
        rec.score = float(row.get("score", 50.0))
        rec.active = bool(row.get("active", True))
        db.commit()
    finally:
        db.close()


def remove_wallet(address: str) -> bool:
    db = get_db()
    try:
        deleted = db.query(SmartWalletRow).filter(SmartWalletRow.address == address).delete()
        db.commit()
        return bool(deleted)
    finally:
        db.close()


def load_wallets() -> list[dict[str, Any]]:
    db = get_db()
    try:
        return [
            {
                "address": r.address,
                "tier": r.tier,
                "label": r.label,
                "score": r.score,
                "active": r.active,
                "added_at": _iso(r.added_at),
            }
            for r in db.query(SmartWalletRow).all()
        ]
    finally:
        db.close()


def append_audit(row: dict[str, Any]) -> None:
    db = get_db()
    try:
        db.add(
            AuditLogRow(
                entry_id=row["entry_id"],
                action=row["action"],
                actor=row["actor"],
                status=row["status"],
                details=dict(row["details"]),
                checksum=row["checksum"],
                timestamp=row["timestamp"],
            )
        )
        db.commit()
    finally:
        db.close()


def list_audit(limit: int = 100, action: Optional[str] = None) -> list[dict[str, Any]]:
    db = get_db()
    try:
        query = db.query(AuditLogRow)
        if action:
            query = query.filter(AuditLogRow.action == action)
        rows = query.order_by(AuditLogRow.id.desc()).limit(max(1, int(limit))).all()
        return [
            {
                "entry_id": r.entry_id,
                "action": r.action,
                "actor": r.actor,
                "status": r.status,
                "details": dict(r.details or {}),
                "checksum": r.checksum,
                "timestamp": r.timestamp,
            }
            for r in rows
        ]
    finally:
        db.close()
