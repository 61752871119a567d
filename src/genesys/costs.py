"""Static monthly cost estimates attached to plan actions.

Figures are indicative list prices in USD, not quotes.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from .specs import BucketSpec, FunctionSpec, InstanceSpec, ResourceSpec, TableSpec

HOURS_PER_MONTH = 730
CURRENCY = "USD"

BUCKET_BREAKDOWN = {"storage": 2.30, "requests": 0.50, "transfer": 2.20}
INSTANCE_MONTHLY = {"small": 50.0, "medium": 100.0, "large": 200.0, "xlarge": 400.0}
TABLE_MONTHLY = {"small": 25.0, "medium": 75.0, "large": 150.0}
# Price per MB-invocation unit, assuming 100k invocations a month.
FUNCTION_RATE = 0.0000166667
FUNCTION_INVOCATIONS = 100_000


@dataclass(frozen=True, slots=True)
class CostEstimate:
    """Predicted spend for one resource."""

    monthly: float
    currency: str = CURRENCY
    confidence: str = "medium"
    breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def hourly(self) -> float:
        return round(self.monthly / HOURS_PER_MONTH, 4)

    def to_dict(self) -> dict[str, object]:
        return {
            "monthly": round(self.monthly, 2),
            "hourly": self.hourly,
            "currency": self.currency,
            "confidence": self.confidence,
            "breakdown": {key: round(value, 2) for key, value in sorted(self.breakdown.items())},
        }


FREE = CostEstimate(monthly=0.0, confidence="high")


class CostEstimator:
    """Looks up estimates from the static price table."""

    def estimate(self, spec: ResourceSpec) -> CostEstimate:
        if isinstance(spec, BucketSpec):
            return CostEstimate(
                monthly=round(sum(BUCKET_BREAKDOWN.values()), 2),
                confidence="low",
                breakdown=dict(BUCKET_BREAKDOWN),
            )
        if isinstance(spec, InstanceSpec):
            monthly = INSTANCE_MONTHLY.get(spec.size, INSTANCE_MONTHLY["small"])
            return CostEstimate(monthly=monthly, breakdown={"compute": monthly})
        if isinstance(spec, TableSpec):
            monthly = TABLE_MONTHLY.get(spec.size, TABLE_MONTHLY["small"])
            return CostEstimate(monthly=monthly, breakdown={"database": monthly})
        if isinstance(spec, FunctionSpec):
            monthly = round(spec.memory * FUNCTION_RATE * FUNCTION_INVOCATIONS, 2)
            return CostEstimate(monthly=monthly, confidence="low", breakdown={"invocations": monthly})
        # Networks and roles are free.
        return FREE


__all__ = ["CURRENCY", "CostEstimate", "CostEstimator", "FREE"]
