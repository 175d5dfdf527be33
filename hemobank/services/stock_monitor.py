"""
Stock monitor: compares each approved hospital's available stock with its
per-group thresholds and raises low/critical alerts.

Alerting is advisory. Counts are read without locks and may be slightly
stale; a failure for one hospital is logged and the sweep moves on.
"""
import logging
import math
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hemobank.core.config import settings
from hemobank.database import utcnow
from hemobank.models import (
    BloodGroup, BloodUnit, Hospital, NotificationPriority, NotificationType, UnitStatus,
)
from hemobank.services.donor_matching import find_nearest_eligible_donors
from hemobank.services.notification_service import notification_service
from hemobank.services.unit_store import unit_store

logger = logging.getLogger(__name__)

CRITICAL = "critical"
LOW = "low"
FORECAST_WINDOW_DAYS = 90
NEAREST_DONOR_IDS = 5


def classify(count: int, threshold: int) -> Optional[str]:
    """critical at or below half the threshold, low at or below it, otherwise None."""
    if count <= threshold / 2:
        return CRITICAL
    if count <= threshold:
        return LOW
    return None


def threshold_for(hospital: Hospital, blood_group: BloodGroup) -> int:
    raw = (hospital.blood_thresholds or {}).get(blood_group.value)
    if raw is None:
        return settings.DEFAULT_STOCK_THRESHOLD
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid threshold {raw!r} for {blood_group.value} at hospital {hospital.id}; using default")
        return settings.DEFAULT_STOCK_THRESHOLD


def risk_level(stock: int) -> str:
    if stock < 5:
        return "critical"
    if stock < 10:
        return "high"
    if stock < 20:
        return "medium"
    return "low"


@dataclass
class StockAlert:
    hospital_id: uuid.UUID
    blood_group: BloodGroup
    level: str
    count: int
    threshold: int
    nearby_donors: int = 0


@dataclass
class SweepReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    hospitals_scanned: int = 0
    alerts: list[StockAlert] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["alerts"] = [
            {**asdict(alert), "hospital_id": str(alert.hospital_id), "blood_group": alert.blood_group.value}
            for alert in self.alerts
        ]
        return data


class StockMonitor:
    def __init__(self, notifications=None, match_donors: Optional[bool] = None):
        self.notifications = notifications or notification_service
        self.match_donors = settings.STOCK_MONITOR_MATCH_DONORS if match_donors is None else match_donors

    async def _attach_nearby_donors(self, db: AsyncSession, hospital: Hospital, alert: StockAlert,
                                    metadata: dict) -> None:
        """Best effort: a failed match leaves the alert without donor data."""
        try:
            matches = await find_nearest_eligible_donors(
                db, alert.blood_group, hospital.latitude, hospital.longitude
            )
        except Exception as e:
            logger.warning(
                f"Donor match failed for {alert.blood_group.value} at hospital {hospital.id}: {e}"
            )
            return
        alert.nearby_donors = len(matches)
        metadata["nearbyDonors"] = len(matches)
        metadata["nearestDonorIds"] = [str(m.donor.id) for m in matches[:NEAREST_DONOR_IDS]]

    async def check_hospital(self, db: AsyncSession, hospital: Hospital) -> list[StockAlert]:
        """Evaluate all eight groups for one hospital and send the alerts they call for."""
        counts = await unit_store.inventory_summary(db, hospital.id)
        alerts = []
        super_admins = None

        for blood_group, count in counts.items():
            threshold = threshold_for(hospital, blood_group)
            level = classify(count, threshold)
            if level is None:
                continue
            alert = StockAlert(hospital.id, blood_group, level, count, threshold)
            alerts.append(alert)

            metadata = {
                "hospitalId": str(hospital.id),
                "hospitalName": hospital.name,
                "bloodGroup": blood_group.value,
                "currentStock": count,
                "threshold": threshold,
            }
            if level == CRITICAL:
                if super_admins is None:
                    super_admins = await self.notifications.super_admin_ids(db)
                if self.match_donors and hospital.latitude is not None and hospital.longitude is not None:
                    await self._attach_nearby_donors(db, hospital, alert, metadata)
                await self.notifications.dispatch(
                    db, [hospital.admin_id, *super_admins], NotificationType.CRITICAL_STOCK_ALERT,
                    "Critical Stock Alert",
                    f"{hospital.name} has only {count} units of {blood_group.value} left "
                    f"(threshold {threshold}).",
                    priority=NotificationPriority.HIGH,
                    hospital_id=hospital.id,
                    action_required=True,
                    action_url="/inventory",
                    action_text="View Inventory",
                    metadata=metadata,
                )
            else:
                await self.notifications.dispatch(
                    db, [hospital.admin_id], NotificationType.LOW_STOCK_ALERT,
                    "Low Stock Alert",
                    f"{blood_group.value} stock is low: {count} units (threshold {threshold}).",
                    priority=NotificationPriority.MEDIUM,
                    hospital_id=hospital.id,
                    action_url="/inventory",
                    action_text="View Inventory",
                    metadata=metadata,
                )

        if alerts:
            logger.info(
                f"Hospital {hospital.name}: "
                + ", ".join(f"{a.blood_group.value}={a.count} ({a.level})" for a in alerts)
            )
        return alerts

    async def run_sweep(self, session_factory: async_sessionmaker) -> SweepReport:
        """Check every approved hospital; each one gets its own session."""
        report = SweepReport(started_at=utcnow())
        async with session_factory() as db:
            result = await db.execute(select(Hospital.id).where(Hospital.is_approved.is_(True)))
            hospital_ids = list(result.scalars().all())

        for hospital_id in hospital_ids:
            try:
                async with session_factory() as db:
                    hospital = await db.get(Hospital, hospital_id)
                    if hospital is None:
                        continue
                    report.alerts.extend(await self.check_hospital(db, hospital))
                report.hospitals_scanned += 1
            except Exception as e:
                logger.error(f"Stock check failed for hospital {hospital_id}: {e}", exc_info=True)
                report.failures[str(hospital_id)] = str(e)

        report.finished_at = utcnow()
        logger.info(
            f"Stock sweep: {report.hospitals_scanned} hospitals, {len(report.alerts)} alerts, "
            f"{len(report.failures)} failures"
        )
        return report

    async def forecast(
        self, db: AsyncSession, hospital_id: uuid.UUID, blood_group: BloodGroup, now: Optional[datetime] = None
    ) -> dict:
        """
        Project stock from the last 90 days of collections and issues.

        Averages are taken over the days with any activity, so a quiet
        period does not dilute them. Issues count on the day they happened.
        """
        now = now or utcnow()
        window_start = now - timedelta(days=FORECAST_WINDOW_DAYS)
        result = await db.execute(
            select(BloodUnit.collection_date, BloodUnit.status, BloodUnit.issued_at).where(
                BloodUnit.hospital_id == hospital_id,
                BloodUnit.blood_group == blood_group,
                or_(BloodUnit.collection_date >= window_start, BloodUnit.issued_at >= window_start),
            )
        )
        collected = defaultdict(int)
        issued = defaultdict(int)
        for collection_date, status, issued_at in result.all():
            if collection_date >= window_start:
                collected[collection_date.date()] += 1
            if status == UnitStatus.ISSUED and issued_at is not None and issued_at >= window_start:
                issued[issued_at.date()] += 1

        days = len(set(collected) | set(issued))
        avg_collected = sum(collected.values()) / days if days else 0.0
        avg_issued = sum(issued.values()) / days if days else 0.0
        net_change = avg_collected - avg_issued

        current_stock = await db.scalar(
            select(func.count()).select_from(BloodUnit).where(
                BloodUnit.hospital_id == hospital_id,
                BloodUnit.blood_group == blood_group,
                BloodUnit.status.in_([UnitStatus.AVAILABLE, UnitStatus.RESERVED]),
                BloodUnit.expiry_date > now,
            )
        )

        hospital = await db.get(Hospital, hospital_id)
        low_threshold = threshold_for(hospital, blood_group) if hospital else settings.DEFAULT_STOCK_THRESHOLD
        days_until_low = None
        if net_change < 0 and current_stock > low_threshold:
            days_until_low = math.ceil((current_stock - low_threshold) / abs(net_change))

        return {
            "hospital_id": str(hospital_id),
            "blood_group": blood_group.value,
            "current_stock": current_stock,
            "avg_daily_collection": round(avg_collected, 1),
            "avg_daily_usage": round(avg_issued, 1),
            "net_daily_change": round(net_change, 1),
            "days_until_low": days_until_low,
            "low_threshold": low_threshold,
            "risk_level": risk_level(current_stock),
            "days_of_history": days,
        }


# Global instance
stock_monitor = StockMonitor()
