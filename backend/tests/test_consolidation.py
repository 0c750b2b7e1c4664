# Overview: Pytest coverage for lot consolidation and consolidation opportunities.

"""
Consolidation Engine Tests

Lots of one (product, branch, supplier) merge into one weighted-average lot.
Sources are retained as CONSOLIDATED with zeroed totals and a terminal
movement pointing at the merged record.
"""

from decimal import Decimal

import pytest
from goldpos.extensions import db
from goldpos.models import OwnershipRecord
from goldpos.models.ownership import STATUS_CONSOLIDATED, MOVEMENT_ADJUSTMENT
from goldpos.services import consolidation_service, movement_service, ownership_store
from goldpos.services.ownership_errors import (
    ConsolidationMismatchError,
    ConcurrencyConflictError,
    RecordNotFoundError,
    TerminalRecordError,
)


class TestConsolidateRecords:

    def test_weighted_average_scenario(self, make_record):
        """(qty 10, cost 1000) + (qty 20, cost 1800) -> qty 30, cost 2800, unit cost 93.33."""
        first = make_record(total_quantity=Decimal('10'), total_weight=Decimal('10'), total_cost=Decimal('1000'))
        second = make_record(day=1, total_quantity=Decimal('20'), total_weight=Decimal('20'), total_cost=Decimal('1800'))

        result = consolidation_service.consolidate_records([first.id, second.id])
        merged = result.record

        assert merged.total_quantity == Decimal('30')
        assert merged.total_weight == Decimal('30')
        assert merged.total_cost == Decimal('2800')
        assert result.weighted_unit_cost == Decimal('93.33')
        assert result.absorbed_record_ids == [first.id, second.id]
        assert merged.supplier_id == 1
        assert merged.purchase_order_id is None

    def test_sources_are_absorbed_not_deleted(self, db_session, make_record):
        first = make_record(initial_payment=Decimal('1000'))
        second = make_record(day=3, initial_payment=Decimal('2000'))

        result = consolidation_service.consolidate_records([first.id, second.id])

        assert db_session.query(OwnershipRecord).count() == 3
        for source_id in (first.id, second.id):
            source = ownership_store.get_record(source_id)
            assert source.status == STATUS_CONSOLIDATED
            assert source.consolidated_into_id == result.record.id
            assert source.total_quantity == Decimal('0')
            assert source.total_cost == Decimal('0')
            assert source.owned_quantity == Decimal('0')

            last = movement_service.list_movements(source_id, newest_first=True)[0]
            assert last.movement_type == MOVEMENT_ADJUSTMENT
            assert last.related_record_id == result.record.id
            assert movement_service.verify_ledger(source)['consistent'] is True

    def test_owned_and_paid_are_summed(self, make_record):
        first = make_record(total_quantity=Decimal('3'), total_cost=Decimal('100'), initial_payment=Decimal('33.33'))
        second = make_record(day=1, total_quantity=Decimal('7'), total_cost=Decimal('900'), initial_payment=Decimal('450'))
        expected_owned = first.owned_quantity + second.owned_quantity

        merged = consolidation_service.consolidate_records([first.id, second.id]).record

        assert merged.owned_quantity == expected_owned
        assert merged.amount_paid == Decimal('483.33')
        assert merged.outstanding_amount == Decimal('516.67')
        assert movement_service.verify_ledger(merged)['consistent'] is True

    def test_paying_off_merged_partially_paid_lot_owns_everything(self, make_record):
        half_paid = make_record(total_quantity=Decimal('10'), total_weight=Decimal('10'),
                                total_cost=Decimal('1000'), initial_payment=Decimal('500'))
        unpaid = make_record(day=1, total_quantity=Decimal('20'), total_weight=Decimal('20'),
                             total_cost=Decimal('1800'))
        merged = consolidation_service.consolidate_records([half_paid.id, unpaid.id]).record
        assert merged.owned_quantity == Decimal('5')
        assert merged.outstanding_amount == Decimal('2300')

        merged = ownership_store.apply_payment(merged.id, Decimal('1150'))
        assert merged.owned_quantity == Decimal('17.5')
        assert merged.status == 'PARTIALLY_OWNED'

        merged = ownership_store.apply_payment(merged.id, merged.outstanding_amount)
        assert merged.owned_quantity == Decimal('30')
        assert merged.owned_weight == Decimal('30')
        assert merged.ownership_percentage == Decimal('1')
        assert merged.outstanding_amount == Decimal('0')
        assert merged.status == 'FULLY_OWNED'
        assert movement_service.verify_ledger(merged)['consistent'] is True

    def test_sold_stock_is_not_bought_again_after_merge(self, make_record):
        paid = make_record(total_quantity=Decimal('10'), total_weight=Decimal('10'),
                           total_cost=Decimal('1000'), initial_payment=Decimal('1000'))
        ownership_store.consume(paid.id, Decimal('5'))
        unpaid = make_record(day=1, total_quantity=Decimal('20'), total_weight=Decimal('20'),
                             total_cost=Decimal('1800'))

        merged = consolidation_service.consolidate_records([paid.id, unpaid.id]).record
        assert merged.consumed_quantity == Decimal('5')
        assert ownership_store.get_record(paid.id).consumed_quantity == Decimal('0')

        merged = ownership_store.apply_payment(merged.id, Decimal('1800'))
        assert merged.owned_quantity == Decimal('25')
        assert merged.owned_weight == Decimal('25')
        assert merged.status == 'FULLY_OWNED'

    def test_merged_lot_keeps_earliest_receipt(self, make_record):
        late = make_record(day=5)
        early = make_record(day=2)
        merged = consolidation_service.consolidate_records([late.id, early.id]).record
        assert merged.received_at == early.received_at

    def test_totals_conserved(self, make_record):
        records = [
            make_record(day=i, total_quantity=Decimal(q), total_weight=Decimal(w), total_cost=Decimal(c))
            for i, (q, w, c) in enumerate([('4', '12.5', '700'), ('9', '30.25', '1650.50'), ('1', '3', '99.99')])
        ]
        merged = consolidation_service.consolidate_records([r.id for r in records]).record

        remaining = db.session.query(OwnershipRecord).filter(OwnershipRecord.id != merged.id).all()
        assert sum(r.total_quantity for r in remaining) == 0
        assert merged.total_quantity == Decimal('14')
        assert merged.total_weight == Decimal('45.75')
        assert merged.total_cost == Decimal('2450.49')

    @pytest.mark.parametrize('field', ['product_id', 'branch_id', 'supplier_id'])
    def test_mismatch_rejected(self, db_session, make_record, field):
        first = make_record()
        second = make_record(day=1, **{field: 2})

        with pytest.raises(ConsolidationMismatchError):
            consolidation_service.consolidate_records([first.id, second.id])

        assert db_session.query(OwnershipRecord).count() == 2
        assert ownership_store.get_record(first.id).consolidated_into_id is None

    def test_records_without_supplier_rejected(self, make_record):
        first = make_record(supplier_id=None)
        second = make_record(day=1, supplier_id=None)
        with pytest.raises(ConsolidationMismatchError):
            consolidation_service.consolidate_records([first.id, second.id])

    def test_needs_two_distinct_records(self, make_record):
        record = make_record()
        with pytest.raises(ConsolidationMismatchError) as exc:
            consolidation_service.consolidate_records([record.id, record.id])
        assert exc.value.invariant == 'at_least_two_records'

    def test_missing_record(self, make_record):
        record = make_record()
        with pytest.raises(RecordNotFoundError):
            consolidation_service.consolidate_records([record.id, 999999])

    def test_terminal_record_cannot_be_merged_again(self, make_record):
        first = make_record()
        second = make_record(day=1)
        third = make_record(day=2)
        consolidation_service.consolidate_records([first.id, second.id])

        with pytest.raises(TerminalRecordError):
            consolidation_service.consolidate_records([first.id, third.id])

    def test_stale_participant_aborts_everything(self, db_session, make_record):
        first = make_record()
        second = make_record(day=1)
        stale = {first.id: first.version_id - 1}

        with pytest.raises(ConcurrencyConflictError):
            consolidation_service.consolidate_records([first.id, second.id], expected_versions=stale)

        assert db_session.query(OwnershipRecord).count() == 2
        assert ownership_store.get_record(second.id).status != STATUS_CONSOLIDATED


class TestWeightedAverageCost:

    def test_breakdown_per_lot(self, make_record):
        first = make_record(total_quantity=Decimal('10'), total_weight=Decimal('5'), total_cost=Decimal('1000'))
        second = make_record(day=1, total_quantity=Decimal('20'), total_weight=Decimal('15'), total_cost=Decimal('1800'))

        blend = consolidation_service.weighted_average_cost([first, second])

        assert blend['unit_cost'] == Decimal('93.33')
        assert blend['cost_per_gram'] == Decimal('140.00')
        assert [b['unit_cost'] for b in blend['breakdown']] == [Decimal('100.00'), Decimal('90.00')]


class TestGroupsAndOpportunities:

    def test_opportunities_largest_groups_first(self, make_record):
        for day in range(3):
            make_record(day=day, product_id=1)
        for day in range(2):
            make_record(day=day, product_id=2)
        make_record(product_id=3)
        make_record(product_id=4, supplier_id=None)
        make_record(product_id=4, supplier_id=None)

        opportunities = consolidation_service.find_consolidation_opportunities(1)

        assert [o['product_id'] for o in opportunities] == [1, 2]
        assert opportunities[0]['record_count'] == 3
        assert opportunities[0]['total_cost'] == '15000.00'
        assert opportunities[0]['outstanding_amount'] == '15000.00'

    def test_other_branch_ignored(self, make_record):
        make_record(branch_id=2)
        make_record(branch_id=2, day=1)
        assert consolidation_service.find_consolidation_opportunities(1) == []

    def test_consolidate_group_with_single_lot(self, make_record):
        make_record()
        assert consolidation_service.consolidate_group(1, 1, 1) is None

    def test_consolidate_supplier_per_product(self, make_record):
        for product_id in (1, 2):
            make_record(product_id=product_id)
            make_record(product_id=product_id, day=1)
        make_record(product_id=3)
        make_record(product_id=1, supplier_id=9)

        results = consolidation_service.consolidate_supplier(1, 1)

        assert [r.record.product_id for r in results] == [1, 2]
        assert all(len(r.absorbed_record_ids) == 2 for r in results)
        assert consolidation_service.find_consolidation_opportunities(1) == []
