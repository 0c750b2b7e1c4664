from __future__ import annotations

from ..extensions import db
from ..decimal_utils import as_str
from ..time_utils import to_utc_z, utcnow


# Source kinds (exactly one source reference per record)
SOURCE_SUPPLIER = "SUPPLIER"
SOURCE_CUSTOMER = "CUSTOMER"
SOURCE_MERCHANT = "MERCHANT"
VALID_SOURCE_TYPES = {SOURCE_SUPPLIER, SOURCE_CUSTOMER, SOURCE_MERCHANT}

# Lifecycle states
STATUS_CREATED = "CREATED"
STATUS_PARTIALLY_OWNED = "PARTIALLY_OWNED"
STATUS_FULLY_OWNED = "FULLY_OWNED"
STATUS_CONSOLIDATED = "CONSOLIDATED"
STATUS_EXHAUSTED = "EXHAUSTED"
TERMINAL_STATUSES = {STATUS_CONSOLIDATED, STATUS_EXHAUSTED}

# Movement types
MOVEMENT_PURCHASE = "PURCHASE"
MOVEMENT_PAYMENT = "PAYMENT"
MOVEMENT_SALE = "SALE"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_CONVERSION = "CONVERSION"
VALID_MOVEMENT_TYPES = {
    MOVEMENT_PURCHASE,
    MOVEMENT_PAYMENT,
    MOVEMENT_SALE,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_CONVERSION,
}
CONSUMPTION_MOVEMENT_TYPES = {MOVEMENT_SALE, MOVEMENT_CONVERSION}

REFERENCE_MAX_LENGTH = 64
NOTE_MAX_LENGTH = 255


class OwnershipRecord(db.Model):
    """
    One lot of stock from one source for one product at one branch.

    The business owns only the paid-for fraction of the lot:
    - total_quantity / total_weight: the full lot received (changed only by consolidation)
    - owned_quantity / owned_weight: the portion the business may sell or melt
    - consumed_quantity / consumed_weight: owned stock already sold, melted or written off
    - ownership_percentage = owned_quantity / total_quantity (quantity is the canonical basis)
    - outstanding_amount = total_cost - amount_paid

    Product, branch, supplier, purchase order and customer purchase are master
    data owned by other modules; only their ids are stored here.

    CONCURRENCY: version_id is the optimistic version stamp. Every UPDATE is
    issued as "... WHERE version_id = <read version>", so a concurrent writer
    makes the flush fail with StaleDataError.

    Records are never deleted. Inactive records carry an explicit terminal
    status (CONSOLIDATED or EXHAUSTED) instead of a boolean flag.
    """
    __tablename__ = "ownership_records"
    __table_args__ = (
        db.CheckConstraint("total_quantity >= 0", name="ck_ownership_total_quantity_non_negative"),
        db.CheckConstraint("owned_quantity >= 0", name="ck_ownership_owned_quantity_non_negative"),
        db.CheckConstraint("owned_quantity <= total_quantity", name="ck_ownership_owned_quantity_bounded"),
        db.CheckConstraint("owned_weight >= 0", name="ck_ownership_owned_weight_non_negative"),
        db.CheckConstraint("owned_weight <= total_weight", name="ck_ownership_owned_weight_bounded"),
        db.CheckConstraint("consumed_quantity >= 0", name="ck_ownership_consumed_quantity_non_negative"),
        db.CheckConstraint(
            "owned_quantity + consumed_quantity <= total_quantity", name="ck_ownership_consumed_quantity_bounded"
        ),
        db.CheckConstraint("consumed_weight >= 0", name="ck_ownership_consumed_weight_non_negative"),
        db.CheckConstraint(
            "owned_weight + consumed_weight <= total_weight", name="ck_ownership_consumed_weight_bounded"
        ),
        db.CheckConstraint("amount_paid >= 0", name="ck_ownership_amount_paid_non_negative"),
        db.CheckConstraint("amount_paid <= total_cost", name="ck_ownership_amount_paid_bounded"),
        db.Index("ix_ownership_product_branch", "product_id", "branch_id"),
        db.Index("ix_ownership_product_branch_supplier", "product_id", "branch_id", "supplier_id"),
        db.Index("ix_ownership_branch_status", "branch_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, nullable=False, index=True)
    branch_id = db.Column(db.Integer, nullable=False, index=True)

    # Source reference: SUPPLIER (supplier_id + optional purchase_order_id),
    # CUSTOMER (customer_purchase_id) or MERCHANT (manufactured in-house, no reference)
    source_type = db.Column(db.String(16), nullable=False)
    supplier_id = db.Column(db.Integer, nullable=True, index=True)
    purchase_order_id = db.Column(db.Integer, nullable=True, index=True)
    customer_purchase_id = db.Column(db.Integer, nullable=True, index=True)

    total_quantity = db.Column(db.Numeric(18, 3), nullable=False)
    total_weight = db.Column(db.Numeric(18, 3), nullable=False)
    owned_quantity = db.Column(db.Numeric(18, 3), nullable=False)
    owned_weight = db.Column(db.Numeric(18, 3), nullable=False)
    # Owned stock that left the lot (sold, converted, written off); never paid for again
    consumed_quantity = db.Column(db.Numeric(18, 3), nullable=False, default=0, server_default="0")
    consumed_weight = db.Column(db.Numeric(18, 3), nullable=False, default=0, server_default="0")
    ownership_percentage = db.Column(db.Numeric(5, 4), nullable=False)

    total_cost = db.Column(db.Numeric(18, 2), nullable=False)
    amount_paid = db.Column(db.Numeric(18, 2), nullable=False)
    outstanding_amount = db.Column(db.Numeric(18, 2), nullable=False)

    status = db.Column(db.String(24), nullable=False, default=STATUS_CREATED, index=True)

    # Back-reference kept on absorbed records after consolidation
    consolidated_into_id = db.Column(
        db.Integer, db.ForeignKey("ownership_records.id"), nullable=True, index=True
    )

    notes = db.Column(db.Text, nullable=True)

    # Receipt date drives FIFO/LIFO layer order
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def unit_cost(self):
        """Cost per unit of quantity for the whole lot (None once absorbed)."""
        if not self.total_quantity:
            return None
        return self.total_cost / self.total_quantity

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<OwnershipRecord id={self.id} product_id={self.product_id} "
            f"branch_id={self.branch_id} status={self.status} owned={self.owned_quantity}/{self.total_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "source_type": self.source_type,
            "supplier_id": self.supplier_id,
            "purchase_order_id": self.purchase_order_id,
            "customer_purchase_id": self.customer_purchase_id,
            "total_quantity": as_str(self.total_quantity),
            "total_weight": as_str(self.total_weight),
            "owned_quantity": as_str(self.owned_quantity),
            "owned_weight": as_str(self.owned_weight),
            "consumed_quantity": as_str(self.consumed_quantity),
            "consumed_weight": as_str(self.consumed_weight),
            "ownership_percentage": as_str(self.ownership_percentage),
            "total_cost": as_str(self.total_cost),
            "amount_paid": as_str(self.amount_paid),
            "outstanding_amount": as_str(self.outstanding_amount),
            "status": self.status,
            "consolidated_into_id": self.consolidated_into_id,
            "notes": self.notes,
            "received_at": to_utc_z(self.received_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OwnershipMovement(db.Model):
    """
    Append-only audit entry for one state-changing event on an OwnershipRecord.

    - Holds only the parent record id (no navigation back to the mutable record).
    - *_change columns are signed deltas; *_after columns are the snapshot after
      the delta was applied.
    - Summing the deltas of a record in (occurred_at, id) order reproduces the
      record's owned_quantity, owned_weight and amount_paid exactly.
    - Never updated or deleted.
    """
    __tablename__ = "ownership_movements"
    __table_args__ = (
        db.Index("ix_ownership_movements_record_occurred", "record_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey("ownership_records.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)

    quantity_change = db.Column(db.Numeric(18, 3), nullable=False)
    weight_change = db.Column(db.Numeric(18, 3), nullable=False)
    amount_change = db.Column(db.Numeric(18, 2), nullable=False)

    owned_quantity_after = db.Column(db.Numeric(18, 3), nullable=False)
    owned_weight_after = db.Column(db.Numeric(18, 3), nullable=False)
    amount_paid_after = db.Column(db.Numeric(18, 2), nullable=False)
    ownership_percentage_after = db.Column(db.Numeric(5, 4), nullable=False)

    # Consolidation target / conversion output / conversion sources
    related_record_id = db.Column(db.Integer, nullable=True, index=True)

    reference = db.Column(db.String(REFERENCE_MAX_LENGTH), nullable=True, index=True)  # sale id, payment reference, etc.
    note = db.Column(db.String(NOTE_MAX_LENGTH), nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)

    # Business time vs system time
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return (
            f"<OwnershipMovement id={self.id} record_id={self.record_id} "
            f"type={self.movement_type} qty={self.quantity_change}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "movement_type": self.movement_type,
            "quantity_change": as_str(self.quantity_change),
            "weight_change": as_str(self.weight_change),
            "amount_change": as_str(self.amount_change),
            "owned_quantity_after": as_str(self.owned_quantity_after),
            "owned_weight_after": as_str(self.owned_weight_after),
            "amount_paid_after": as_str(self.amount_paid_after),
            "ownership_percentage_after": as_str(self.ownership_percentage_after),
            "related_record_id": self.related_record_id,
            "reference": self.reference,
            "note": self.note,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }
