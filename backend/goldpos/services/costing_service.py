# Overview: Cost engine; read-only FIFO, LIFO and weighted-average layer plans over owned lots.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ..extensions import db
from ..models import OwnershipRecord
from ..models.ownership import TERMINAL_STATUSES
from ..decimal_utils import ZERO, qty, money, to_decimal, as_str
from ..time_utils import to_utc_z
from .concurrency import lock_for_update
from .ownership_errors import OwnershipError, InsufficientStockError

"""
Costing rules:
- Eligible layers are non-terminal records of the product at the branch with
  owned_quantity > 0, ordered by (received_at, id).
- A layer's unit cost is total_cost / total_quantity of its record.
- FIFO takes layers oldest first, LIFO newest first; each layer gives
  min(still needed, owned_quantity).
- Weighted average prices the whole request at one blended rate
  sum(owned_weight * unit_cost) / sum(owned_weight) (quantity-weighted when no
  layer carries weight). Execution still needs concrete records, so the plan
  also carries FIFO allocations.
- Planning never mutates; the ownership service executes a plan through
  consume(), where the real invariant checks happen.
"""

METHOD_FIFO = "FIFO"
METHOD_LIFO = "LIFO"
METHOD_WEIGHTED_AVERAGE = "WEIGHTED_AVERAGE"
COSTING_METHODS = {METHOD_FIFO, METHOD_LIFO, METHOD_WEIGHTED_AVERAGE}

_METHOD_ALIASES = {
    "FIFO": METHOD_FIFO,
    "LIFO": METHOD_LIFO,
    "WA": METHOD_WEIGHTED_AVERAGE,
    "WAC": METHOD_WEIGHTED_AVERAGE,
    "WEIGHTED_AVERAGE": METHOD_WEIGHTED_AVERAGE,
    "WEIGHTEDAVERAGE": METHOD_WEIGHTED_AVERAGE,
}


@dataclass(frozen=True)
class LayerSource:
    """What the planner needs to know about one owned lot."""
    record_id: int
    received_at: datetime
    owned_quantity: Decimal
    owned_weight: Decimal
    unit_cost: Decimal

    @classmethod
    def from_record(cls, record: OwnershipRecord) -> "LayerSource":
        total_quantity = Decimal(record.total_quantity)
        return cls(
            record_id=record.id,
            received_at=record.received_at,
            owned_quantity=qty(record.owned_quantity),
            owned_weight=qty(record.owned_weight),
            unit_cost=(Decimal(record.total_cost) / total_quantity) if total_quantity else ZERO,
        )


@dataclass(frozen=True)
class CostLayer:
    record_id: int | None
    quantity: Decimal
    unit_cost: Decimal
    cost: Decimal

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "quantity": as_str(self.quantity),
            "unit_cost": as_str(self.unit_cost),
            "cost": as_str(self.cost),
        }


@dataclass(frozen=True)
class Allocation:
    """A concrete debit against one record when a plan is executed."""
    record_id: int
    quantity: Decimal

    def to_dict(self) -> dict:
        return {"record_id": self.record_id, "quantity": as_str(self.quantity)}


@dataclass(frozen=True)
class CostPlan:
    method: str
    requested_quantity: Decimal
    layers: tuple[CostLayer, ...]
    allocations: tuple[Allocation, ...]
    total_cost: Decimal

    @property
    def average_unit_cost(self) -> Decimal:
        if not self.requested_quantity:
            return ZERO
        return money(self.total_cost / self.requested_quantity)

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "requested_quantity": as_str(self.requested_quantity),
            "total_cost": as_str(self.total_cost),
            "average_unit_cost": as_str(self.average_unit_cost),
            "layers": [layer.to_dict() for layer in self.layers],
            "allocations": [a.to_dict() for a in self.allocations],
        }


def normalize_method(method: str | None) -> str:
    if method is None:
        return METHOD_FIFO
    key = str(method).strip().upper().replace("-", "_").replace(" ", "_")
    resolved = _METHOD_ALIASES.get(key)
    if resolved is None:
        raise OwnershipError(
            f"Unknown costing method: {method}. Use one of {sorted(COSTING_METHODS)}",
            invariant="costing_method",
        )
    return resolved


def _walk(sources: list[LayerSource], quantity: Decimal) -> list[tuple[LayerSource, Decimal]]:
    remaining = quantity
    taken = []
    for source in sources:
        if remaining <= 0:
            break
        take = min(remaining, source.owned_quantity)
        if take <= 0:
            continue
        taken.append((source, take))
        remaining -= take
    if remaining > 0:
        available = sum((s.owned_quantity for s in sources), ZERO)
        raise InsufficientStockError(
            f"Insufficient owned stock. Available: {available}, Requested: {quantity}"
        )
    return taken


def blended_rate(sources: list[LayerSource]) -> Decimal:
    """Weight-weighted average unit cost; falls back to quantity weighting without weights."""
    total_weight = sum((s.owned_weight for s in sources), ZERO)
    if total_weight > 0:
        return sum((s.owned_weight * s.unit_cost for s in sources), ZERO) / total_weight
    total_quantity = sum((s.owned_quantity for s in sources), ZERO)
    if total_quantity > 0:
        return sum((s.owned_quantity * s.unit_cost for s in sources), ZERO) / total_quantity
    return ZERO


def select_layers(sources: list[LayerSource], quantity, method: str = METHOD_FIFO) -> CostPlan:
    """
    Build a cost plan for `quantity` from candidate layers. Pure function.

    Raises:
        InsufficientStockError: the layers together own less than `quantity`
    """
    method = normalize_method(method)
    requested = qty(to_decimal(quantity, field="quantity"))
    if requested <= 0:
        raise OwnershipError(f"Requested quantity must be positive (got {requested})", invariant="quantity > 0")

    ordered = sorted(
        (s for s in sources if s.owned_quantity > 0),
        key=lambda s: (s.received_at, s.record_id),
    )
    if method == METHOD_LIFO:
        ordered.reverse()

    taken = _walk(ordered, requested)
    allocations = tuple(Allocation(record_id=s.record_id, quantity=q) for s, q in taken)

    if method == METHOD_WEIGHTED_AVERAGE:
        rate = blended_rate(ordered)
        total_cost = money(rate * requested)
        layers = (CostLayer(record_id=None, quantity=requested, unit_cost=money(rate), cost=total_cost),)
    else:
        layers = tuple(
            CostLayer(
                record_id=s.record_id,
                quantity=q,
                unit_cost=money(s.unit_cost),
                cost=money(s.unit_cost * q),
            )
            for s, q in taken
        )
        total_cost = money(sum((layer.cost for layer in layers), ZERO))

    return CostPlan(
        method=method,
        requested_quantity=requested,
        layers=layers,
        allocations=allocations,
        total_cost=total_cost,
    )


def eligible_records(product_id: int, branch_id: int, *, lock: bool = False) -> list[OwnershipRecord]:
    query = db.session.query(OwnershipRecord).filter(
        OwnershipRecord.product_id == product_id,
        OwnershipRecord.branch_id == branch_id,
        OwnershipRecord.status.notin_(TERMINAL_STATUSES),
        OwnershipRecord.owned_quantity > 0,
    )
    if lock:
        query = lock_for_update(query)
    return query.order_by(OwnershipRecord.received_at.asc(), OwnershipRecord.id.asc()).all()


def plan_cost(product_id: int, branch_id: int, quantity, method: str = METHOD_FIFO) -> CostPlan:
    """Cost plan for selling or converting `quantity` of a product at a branch."""
    sources = [LayerSource.from_record(r) for r in eligible_records(product_id, branch_id)]
    return select_layers(sources, quantity, method)


def cost_analysis(product_id: int, branch_id: int) -> dict:
    """One-unit cost under each method, side by side."""
    records = eligible_records(product_id, branch_id)
    sources = [LayerSource.from_record(r) for r in records]

    methods = {}
    for method in (METHOD_WEIGHTED_AVERAGE, METHOD_FIFO, METHOD_LIFO):
        try:
            plan = select_layers(sources, 1, method)
        except InsufficientStockError as exc:
            methods[method] = {"available": False, "error": str(exc)}
            continue
        methods[method] = {"available": True, "unit_cost": as_str(plan.total_cost), "plan": plan.to_dict()}

    return {
        "product_id": product_id,
        "branch_id": branch_id,
        "layer_count": len(records),
        "owned_quantity": as_str(sum((s.owned_quantity for s in sources), ZERO)),
        "owned_weight": as_str(sum((s.owned_weight for s in sources), ZERO)),
        "layers": [
            {
                "record_id": r.id,
                "received_at": to_utc_z(r.received_at),
                "owned_quantity": as_str(qty(r.owned_quantity)),
                "unit_cost": as_str(money(s.unit_cost)),
            }
            for r, s in zip(records, sources)
        ],
        "methods": methods,
        "recommended_method": METHOD_WEIGHTED_AVERAGE,
    }
