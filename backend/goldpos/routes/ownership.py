# Overview: Flask API routes for ownership tracking; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..decimal_utils import ZERO, as_str
from ..services import ownership_service, ownership_store
from ..services.ownership_errors import (
    OwnershipError,
    RecordNotFoundError,
    InvalidLotError,
    OwnershipPolicyError,
)
from ..services.ownership_policy import get_policy
from ..time_utils import parse_received_at

"""
Error mapping:
- RecordNotFoundError -> 404
- malformed input (InvalidLotError, OwnershipPolicyError, plain ValueError,
  generic OwnershipError) -> 400
- every other engine error (overpayment, insufficient ownership/stock,
  mismatch, terminal state, blocked sale, version conflict) -> 409
Bodies are {"error": message, "invariant": name}.
Authentication is handled in front of this blueprint.
"""

ownership_bp = Blueprint("ownership", __name__, url_prefix="/api/ownership")

_BAD_REQUEST = (InvalidLotError, OwnershipPolicyError)


def _error_response(exc: Exception):
    if isinstance(exc, RecordNotFoundError):
        status = 404
    elif isinstance(exc, _BAD_REQUEST) or type(exc) is OwnershipError:
        status = 400
    elif isinstance(exc, OwnershipError):
        status = 409
    else:
        return jsonify({"error": str(exc), "invariant": None}), 400
    return jsonify({"error": str(exc), "invariant": exc.invariant}), status


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _flag(data: dict, field: str) -> bool:
    value = data.get(field, False)
    if not isinstance(value, bool):
        raise ValueError(f"{field} must be a JSON boolean (got {value!r})")
    return value


def _version(data: dict):
    """expected_version as an int; numeric strings are accepted, anything else is a 400."""
    value = data.get("expected_version")
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected_version must be an integer (got {value!r})")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValueError(f"expected_version must be an integer (got {value!r})")


def _missing(data: dict, *fields: str):
    absent = [f for f in fields if data.get(f) in (None, "")]
    if absent:
        return jsonify({"error": f"{', '.join(absent)} required", "invariant": None}), 400
    return None


@ownership_bp.post("/records")
def create_record_route():
    """Create an ownership record when stock is received."""
    data = _payload()
    missing = _missing(data, "product_id", "branch_id", "total_quantity", "total_cost")
    if missing:
        return missing

    try:
        record = ownership_store.create_record(
            product_id=data["product_id"],
            branch_id=data["branch_id"],
            total_quantity=data["total_quantity"],
            total_weight=data.get("total_weight", 0),
            total_cost=data["total_cost"],
            initial_payment=data.get("initial_payment", 0),
            supplier_id=data.get("supplier_id"),
            purchase_order_id=data.get("purchase_order_id"),
            customer_purchase_id=data.get("customer_purchase_id"),
            received_at=parse_received_at(data.get("received_at")),
            notes=data.get("notes"),
            reference=data.get("reference"),
            actor_user_id=data.get("actor_user_id"),
        )
    except ValueError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create ownership record")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"record": record.to_dict()}), 201


@ownership_bp.get("/records/<int:record_id>")
def get_record_route(record_id: int):
    try:
        record = ownership_service.get_ownership(record_id)
    except OwnershipError as e:
        return _error_response(e)
    return jsonify({"record": record.to_dict()}), 200


@ownership_bp.get("/records/<int:record_id>/movements")
def list_movements_route(record_id: int):
    newest_first = request.args.get("order", "asc").lower() == "desc"
    try:
        movements = ownership_service.movement_history(record_id, newest_first=newest_first)
    except OwnershipError as e:
        return _error_response(e)
    return jsonify({"record_id": record_id, "movements": [m.to_dict() for m in movements]}), 200


@ownership_bp.get("/records/<int:record_id>/verify")
def verify_record_route(record_id: int):
    try:
        report = ownership_service.verify_ledger(record_id)
    except OwnershipError as e:
        return _error_response(e)
    return jsonify(report), 200


@ownership_bp.post("/records/<int:record_id>/payments")
def apply_payment_route(record_id: int):
    """
    Apply a payment to a lot.

    Body: {"amount": "2500.00", "confirmed": true, "reference": "...", "expected_version": 3}
    """
    data = _payload()
    missing = _missing(data, "amount")
    if missing:
        return missing

    try:
        record = ownership_service.update_ownership_after_payment(
            record_id,
            data["amount"],
            confirmed=_flag(data, "confirmed"),
            reference=data.get("reference"),
            note=data.get("note"),
            actor_user_id=data.get("actor_user_id"),
            expected_version=_version(data),
        )
    except ValueError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply ownership payment")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"record": record.to_dict()}), 200


@ownership_bp.post("/records/<int:record_id>/sales")
def record_sale_on_record_route(record_id: int):
    data = _payload()
    missing = _missing(data, "quantity")
    if missing:
        return missing

    try:
        record = ownership_service.update_ownership_after_sale(
            record_id,
            data["quantity"],
            reference=data.get("reference"),
            actor_user_id=data.get("actor_user_id"),
            expected_version=_version(data),
        )
    except ValueError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record sale against ownership record")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"record": record.to_dict()}), 200


@ownership_bp.post("/records/<int:record_id>/adjustments")
def adjust_record_route(record_id: int):
    data = _payload()
    missing = _missing(data, "quantity_delta", "reason")
    if missing:
        return missing

    try:
        record = ownership_service.adjust_ownership(
            record_id,
            data["quantity_delta"],
            data.get("weight_delta"),
            reason=data["reason"],
            reference=data.get("reference"),
            actor_user_id=data.get("actor_user_id"),
            expected_version=_version(data),
        )
    except ValueError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust ownership record")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"record": record.to_dict()}), 200


@ownership_bp.post("/validate")
def validate_ownership_route():
    data = _payload()
    missing = _missing(data, "product_id", "branch_id", "quantity")
    if missing:
        return missing

    try:
        result = ownership_service.validate_ownership(data["product_id"], data["branch_id"], data["quantity"])
    except ValueError as e:
        return _error_response(e)
    return jsonify(result.to_dict()), 200


@ownership_bp.post("/sales")
def record_sale_route():
    """
    Sell a quantity of a product across its lots using a costing method.

    Body: {"product_id": 1, "branch_id": 1, "quantity": "15", "method": "FIFO"}
    """
    data = _payload()
    missing = _missing(data, "product_id", "branch_id", "quantity")
    if missing:
        return missing

    try:
        result = ownership_service.record_sale(
            data["product_id"],
            data["branch_id"],
            data["quantity"],
            data.get("method") or "FIFO",
            reference=data.get("reference"),
            actor_user_id=data.get("actor_user_id"),
        )
    except ValueError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record ownership sale")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result.to_dict()), 201


@ownership_bp.post("/conversions")
def convert_route():
    data = _payload()
    missing = _missing(data, "source_record_ids", "target_product_id", "quantity", "weight")
    if missing:
        return missing
    if not isinstance(data["source_record_ids"], list):
        return jsonify({"error": "source_record_ids must be a list", "invariant": None}), 400

    try:
        record = ownership_service.convert_raw_gold_to_products(
            data["source_record_ids"],
            data["target_product_id"],
            data["quantity"],
            data["weight"],
            reference=data.get("reference"),
            actor_user_id=data.get("actor_user_id"),
        )
    except ValueError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to convert raw gold")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"record": record.to_dict()}), 201


@ownership_bp.post("/consolidations")
def consolidate_route():
    data = _payload()
    record_ids = data.get("record_ids")
    if not isinstance(record_ids, list) or not record_ids:
        return jsonify({"error": "record_ids required", "invariant": None}), 400

    try:
        result = ownership_service.consolidate_ownership(record_ids, actor_user_id=data.get("actor_user_id"))
    except ValueError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to consolidate ownership records")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result.to_dict()), 201


@ownership_bp.post("/consolidations/supplier")
def consolidate_supplier_route():
    data = _payload()
    missing = _missing(data, "supplier_id", "branch_id")
    if missing:
        return missing

    try:
        results = ownership_service.consolidate_supplier_ownership(
            data["supplier_id"], data["branch_id"], actor_user_id=data.get("actor_user_id")
        )
    except ValueError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to consolidate supplier ownership")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "supplier_id": data["supplier_id"],
        "branch_id": data["branch_id"],
        "consolidations": [r.to_dict() for r in results],
    }), 200


@ownership_bp.get("/consolidations/opportunities")
def consolidation_opportunities_route():
    branch_id = request.args.get("branch_id", type=int)
    if branch_id is None:
        return jsonify({"error": "branch_id required", "invariant": None}), 400
    return jsonify({"opportunities": ownership_service.consolidation_opportunities(branch_id)}), 200


@ownership_bp.get("/products/<int:product_id>/summary")
def product_summary_route(product_id: int):
    branch_id = request.args.get("branch_id", type=int)
    return jsonify(ownership_service.ownership_summary(product_id, branch_id)), 200


@ownership_bp.get("/products/<int:product_id>/cost-plan")
def cost_plan_route(product_id: int):
    branch_id = request.args.get("branch_id", type=int)
    quantity = request.args.get("quantity")
    if branch_id is None or not quantity:
        return jsonify({"error": "branch_id and quantity required", "invariant": None}), 400

    try:
        plan = ownership_service.plan_cost(product_id, branch_id, quantity, request.args.get("method") or "FIFO")
    except ValueError as e:
        return _error_response(e)
    return jsonify(plan.to_dict()), 200


@ownership_bp.get("/products/<int:product_id>/cost-analysis")
def cost_analysis_route(product_id: int):
    branch_id = request.args.get("branch_id", type=int)
    if branch_id is None:
        return jsonify({"error": "branch_id required", "invariant": None}), 400
    return jsonify(ownership_service.cost_analysis(product_id, branch_id)), 200


@ownership_bp.get("/low-ownership")
def low_ownership_route():
    branch_id = request.args.get("branch_id", type=int)
    threshold = request.args.get("threshold")
    try:
        records = ownership_service.low_ownership_records(threshold=threshold, branch_id=branch_id)
    except ValueError as e:
        return _error_response(e)
    return jsonify({"records": [r.to_dict() for r in records]}), 200


@ownership_bp.get("/outstanding")
def outstanding_route():
    records = ownership_service.outstanding_records(
        branch_id=request.args.get("branch_id", type=int),
        supplier_id=request.args.get("supplier_id", type=int),
    )
    total = sum((r.outstanding_amount for r in records), ZERO)
    return jsonify({"records": [r.to_dict() for r in records], "total_outstanding": as_str(total)}), 200


@ownership_bp.get("/alerts")
def alerts_route():
    alerts = ownership_service.ownership_alerts(branch_id=request.args.get("branch_id", type=int))
    return jsonify({"alerts": alerts, "count": len(alerts)}), 200


@ownership_bp.get("/settings")
def settings_route():
    try:
        policy = get_policy()
    except OwnershipPolicyError as e:
        return _error_response(e)
    return jsonify(policy.settings.to_dict()), 200
