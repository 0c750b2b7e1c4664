# Overview: Pytest coverage for the ownership record store (create, pay, consume, adjust).

"""
Ownership Record Store Tests

Covers lot creation, proportional ownership growth on payment, consumption
capped by owned stock and manual adjustments bound by the same invariants.
"""

from decimal import Decimal

import pytest
from goldpos.extensions import db
from goldpos.models import OwnershipRecord, OwnershipMovement
from goldpos.models.ownership import (
    SOURCE_SUPPLIER,
    SOURCE_CUSTOMER,
    SOURCE_MERCHANT,
    STATUS_CREATED,
    STATUS_PARTIALLY_OWNED,
    STATUS_FULLY_OWNED,
    STATUS_EXHAUSTED,
    MOVEMENT_PURCHASE,
    MOVEMENT_CONVERSION,
    MOVEMENT_ADJUSTMENT,
)
from goldpos.services import ownership_store
from goldpos.services.ownership_errors import (
    OwnershipError,
    InvalidLotError,
    OverpaymentError,
    InsufficientOwnershipError,
    ExcessOwnershipError,
    RecordNotFoundError,
    TerminalRecordError,
)


def _movement_count(record_id):
    return db.session.query(OwnershipMovement).filter_by(record_id=record_id).count()


class TestCreateRecord:

    def test_unpaid_lot_starts_with_nothing_owned(self, make_record):
        record = make_record()

        assert record.status == STATUS_CREATED
        assert record.source_type == SOURCE_SUPPLIER
        assert record.owned_quantity == Decimal('0')
        assert record.owned_weight == Decimal('0')
        assert record.ownership_percentage == Decimal('0')
        assert record.outstanding_amount == Decimal('5000')
        assert _movement_count(record.id) == 1

    def test_initial_payment_gives_proportional_ownership(self, make_record):
        record = make_record(total_weight=Decimal('80'), initial_payment=Decimal('1250'))

        assert record.owned_quantity == Decimal('25')
        assert record.owned_weight == Decimal('20')
        assert record.ownership_percentage == Decimal('0.25')
        assert record.status == STATUS_PARTIALLY_OWNED

        movement = db.session.query(OwnershipMovement).filter_by(record_id=record.id).one()
        assert movement.movement_type == MOVEMENT_PURCHASE
        assert movement.amount_change == Decimal('1250')
        assert movement.owned_quantity_after == Decimal('25')

    def test_zero_cost_lot_is_fully_owned(self, make_record):
        record = make_record(total_cost=Decimal('0'))
        assert record.owned_quantity == record.total_quantity
        assert record.status == STATUS_FULLY_OWNED

    def test_customer_and_merchant_sources(self, make_record):
        customer = make_record(supplier_id=None, customer_purchase_id=7)
        merchant = make_record(supplier_id=None)

        assert customer.source_type == SOURCE_CUSTOMER
        assert merchant.source_type == SOURCE_MERCHANT

    @pytest.mark.parametrize('overrides', [
        {'total_quantity': Decimal('0')},
        {'total_quantity': Decimal('-5')},
        {'total_cost': Decimal('-1')},
        {'total_weight': Decimal('-1')},
        {'customer_purchase_id': 3},
        {'supplier_id': None, 'purchase_order_id': 9},
        {'total_quantity': 'lots'},
    ])
    def test_malformed_receipt_rejected(self, db_session, make_record, overrides):
        with pytest.raises(InvalidLotError):
            make_record(**overrides)
        assert db_session.query(OwnershipRecord).count() == 0

    def test_initial_payment_above_cost_rejected(self, db_session, make_record):
        with pytest.raises(OverpaymentError):
            make_record(initial_payment=Decimal('5000.01'))
        assert db_session.query(OwnershipRecord).count() == 0


class TestApplyPayment:

    def test_partial_payment_scenario(self, make_record):
        """100 units for 5000: 0% -> 50% -> 100% as payments arrive."""
        record = make_record()
        assert record.ownership_percentage == Decimal('0')

        ownership_store.apply_payment(record.id, Decimal('2500'))
        record = ownership_store.get_record(record.id)
        assert record.ownership_percentage == Decimal('0.5')
        assert record.owned_quantity == Decimal('50')
        assert record.status == STATUS_PARTIALLY_OWNED

        ownership_store.apply_payment(record.id, Decimal('2500'))
        record = ownership_store.get_record(record.id)
        assert record.ownership_percentage == Decimal('1')
        assert record.owned_quantity == Decimal('100')
        assert record.outstanding_amount == Decimal('0')
        assert record.status == STATUS_FULLY_OWNED

    def test_overpayment_rejected_and_record_unchanged(self, make_record):
        record = make_record(initial_payment=Decimal('5000'))
        version = record.version_id
        movements = _movement_count(record.id)

        with pytest.raises(OverpaymentError):
            ownership_store.apply_payment(record.id, Decimal('1'))

        record = ownership_store.get_record(record.id)
        assert record.amount_paid == Decimal('5000')
        assert record.outstanding_amount == Decimal('0')
        assert record.version_id == version
        assert _movement_count(record.id) == movements

    def test_non_positive_payment_rejected(self, make_record):
        record = make_record()
        with pytest.raises(OwnershipError) as exc:
            ownership_store.apply_payment(record.id, Decimal('0'))
        assert exc.value.invariant == 'amount > 0'

    def test_uneven_payments_land_exactly_on_total(self, make_record):
        record = make_record(total_quantity=Decimal('3'), total_weight=Decimal('7'), total_cost=Decimal('100'))
        for amount in ('33.33', '33.33', '33.34'):
            ownership_store.apply_payment(record.id, Decimal(amount))

        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('3')
        assert record.owned_weight == Decimal('7')
        assert record.status == STATUS_FULLY_OWNED

    def test_payments_never_decrease_ownership(self, make_record):
        record = make_record(total_quantity=Decimal('7'), total_cost=Decimal('999'))
        previous = Decimal('0')
        for amount in ('1', '250', '0.01', '300', '447.99'):
            ownership_store.apply_payment(record.id, Decimal(amount))
            current = ownership_store.get_record(record.id).ownership_percentage
            assert current >= previous
            previous = current

    def test_missing_record(self, db_session):
        with pytest.raises(RecordNotFoundError):
            ownership_store.apply_payment(424242, Decimal('10'))

    def test_overlong_reference_rejected_and_record_unchanged(self, make_record):
        record = make_record()
        with pytest.raises(OwnershipError) as exc:
            ownership_store.apply_payment(record.id, Decimal('100'), reference='R' * 65)
        assert exc.value.invariant == 'reference_length'

        record = ownership_store.get_record(record.id)
        assert record.amount_paid == Decimal('0')
        assert db.session.query(OwnershipMovement).filter_by(record_id=record.id).count() == 1

    def test_long_note_is_truncated(self, make_record):
        record = make_record()
        ownership_store.apply_payment(record.id, Decimal('100'), reference='R' * 64, note='n' * 300)

        last = (
            db.session.query(OwnershipMovement)
            .filter_by(record_id=record.id)
            .order_by(OwnershipMovement.id.desc())
            .first()
        )
        assert last.reference == 'R' * 64
        assert len(last.note) == 255


class TestConsume:

    def test_sale_capped_by_owned_quantity(self, make_record):
        record = make_record(initial_payment=Decimal('2500'))

        with pytest.raises(InsufficientOwnershipError):
            ownership_store.consume(record.id, Decimal('51'))

        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('50')

    def test_sale_debits_proportional_weight(self, make_record):
        record = make_record(total_weight=Decimal('250'), initial_payment=Decimal('5000'))
        ownership_store.consume(record.id, Decimal('10'))

        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('90')
        assert record.owned_weight == Decimal('225')
        assert record.total_quantity == Decimal('100')

    def test_selling_everything_exhausts_paid_lot(self, make_record):
        record = make_record(initial_payment=Decimal('5000'))
        ownership_store.consume(record.id, Decimal('100'))

        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('0')
        assert record.owned_weight == Decimal('0')
        assert record.status == STATUS_EXHAUSTED

        with pytest.raises(TerminalRecordError):
            ownership_store.apply_payment(record.id, Decimal('1'))

    def test_selling_all_owned_of_unpaid_lot_keeps_it_open(self, make_record):
        record = make_record(initial_payment=Decimal('2500'))
        ownership_store.consume(record.id, Decimal('50'))

        record = ownership_store.get_record(record.id)
        assert record.status == STATUS_PARTIALLY_OWNED

        ownership_store.apply_payment(record.id, Decimal('2500'))
        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('50')
        assert record.status == STATUS_FULLY_OWNED

    def test_sold_stock_is_tracked_as_consumed(self, make_record):
        record = make_record(initial_payment=Decimal('2500'))
        ownership_store.consume(record.id, Decimal('20'))

        record = ownership_store.get_record(record.id)
        assert record.consumed_quantity == Decimal('20')
        assert record.consumed_weight == Decimal('20')

        ownership_store.apply_payment(record.id, Decimal('1250'))
        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('55')

        ownership_store.apply_payment(record.id, Decimal('1250'))
        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('80')
        assert record.status == STATUS_FULLY_OWNED

    def test_conversion_movement_type(self, make_record):
        record = make_record(initial_payment=Decimal('5000'))
        ownership_store.consume(record.id, Decimal('5'), Decimal('5'), movement_type=MOVEMENT_CONVERSION)

        last = (
            db.session.query(OwnershipMovement)
            .filter_by(record_id=record.id)
            .order_by(OwnershipMovement.id.desc())
            .first()
        )
        assert last.movement_type == MOVEMENT_CONVERSION
        assert last.quantity_change == Decimal('-5')

    def test_payment_is_not_a_consumption(self, make_record):
        record = make_record(initial_payment=Decimal('5000'))
        with pytest.raises(OwnershipError):
            ownership_store.consume(record.id, Decimal('1'), movement_type='PAYMENT')


class TestAdjust:

    def test_reason_required(self, make_record):
        record = make_record(initial_payment=Decimal('5000'))
        with pytest.raises(OwnershipError) as exc:
            ownership_store.adjust(record.id, Decimal('-1'), reason='  ')
        assert exc.value.invariant == 'adjustment_reason'

    def test_adjustment_writes_movement_with_reason(self, make_record):
        record = make_record(initial_payment=Decimal('5000'))
        ownership_store.adjust(record.id, Decimal('-2'), reason='Scale recount')

        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('98')
        assert record.owned_weight == Decimal('98')

        last = (
            db.session.query(OwnershipMovement)
            .filter_by(record_id=record.id)
            .order_by(OwnershipMovement.id.desc())
            .first()
        )
        assert last.movement_type == MOVEMENT_ADJUSTMENT
        assert last.note == 'Scale recount'

    def test_adjustment_cannot_exceed_total(self, make_record):
        record = make_record(initial_payment=Decimal('5000'))
        with pytest.raises(ExcessOwnershipError):
            ownership_store.adjust(record.id, Decimal('1'), reason='Found one')

    def test_write_off_is_not_bought_by_later_payments(self, make_record):
        record = make_record(initial_payment=Decimal('2500'))
        ownership_store.adjust(record.id, Decimal('-10'), reason='Stolen from display')

        ownership_store.apply_payment(record.id, Decimal('2500'))
        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('90')
        assert record.consumed_quantity == Decimal('10')
        assert record.status == STATUS_FULLY_OWNED

        ownership_store.adjust(record.id, Decimal('4'), reason='Found in safe')
        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('94')
        assert record.consumed_quantity == Decimal('6')

    def test_adjustment_cannot_go_negative(self, make_record):
        record = make_record(initial_payment=Decimal('500'))
        with pytest.raises(InsufficientOwnershipError):
            ownership_store.adjust(record.id, Decimal('-11'), reason='Shrinkage')

        record = ownership_store.get_record(record.id)
        assert record.owned_quantity == Decimal('10')
