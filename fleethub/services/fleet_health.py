"""
Fleet health scoring.

Every asset is checked against three independent defect buckets. The health
index subtracts 30 points per defect per asset, normalized by fleet size, so
an asset in two buckets costs twice.
"""
import math
from dataclasses import dataclass
from typing import Any, Iterable, Set

AT_RISK = "at_risk"
MAINTENANCE_DUE = "maintenance_due"
COMPLIANCE_ISSUE = "compliance_issue"

AT_RISK_MILEAGE = 100000
AT_RISK_YEAR = 2010
MAINTENANCE_MILEAGE = 50000
DEFECT_WEIGHT = 30


@dataclass(frozen=True)
class FleetHealth:
    health_index: int
    total_assets: int
    at_risk: int
    maintenance_due: int
    compliance_issues: int


def _over(value, limit) -> bool:
    return value is not None and value > limit


def _blank(value) -> bool:
    return not (value or "").strip()


def classify(asset: Any) -> Set[str]:
    """Buckets a single asset falls into (possibly several, possibly none)."""
    buckets = set()
    year = getattr(asset, "year", None)
    mileage = getattr(asset, "mileage", None)
    odometer = getattr(asset, "odometer", None)

    if _over(mileage, AT_RISK_MILEAGE) or (year is not None and year < AT_RISK_YEAR):
        buckets.add(AT_RISK)
    if _over(mileage, MAINTENANCE_MILEAGE) or _over(odometer, MAINTENANCE_MILEAGE):
        buckets.add(MAINTENANCE_DUE)
    if _blank(getattr(asset, "vin", None)) or _blank(getattr(asset, "state", None)):
        buckets.add(COMPLIANCE_ISSUE)
    return buckets


def score(assets: Iterable[Any]) -> FleetHealth:
    total = 0
    at_risk = maintenance_due = compliance_issues = 0
    for asset in assets:
        total += 1
        buckets = classify(asset)
        at_risk += AT_RISK in buckets
        maintenance_due += MAINTENANCE_DUE in buckets
        compliance_issues += COMPLIANCE_ISSUE in buckets

    if total == 0:
        index = 100
    else:
        defects = at_risk + maintenance_due + compliance_issues
        # Half-up rounding; round() would send 72.5 to 72
        index = math.floor(100 - (defects / total) * DEFECT_WEIGHT + 0.5)
        index = max(0, min(100, index))

    return FleetHealth(
        health_index=int(index),
        total_assets=total,
        at_risk=at_risk,
        maintenance_due=maintenance_due,
        compliance_issues=compliance_issues,
    )
