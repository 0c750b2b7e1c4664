# Overview: Pytest coverage for the ownership policy and the sale/transfer/adjustment validator.

"""
Ownership Validator Tests

The validator is read-only and talks to an injected policy. Positions are
built directly so most cases do not touch the database.
"""

from decimal import Decimal

import pytest
from goldpos.services.ownership_errors import OwnershipPolicyError
from goldpos.services.ownership_policy import (
    ConfiguredOwnershipPolicy,
    OwnershipSettings,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    SEVERITY_HIGH,
    SEVERITY_CRITICAL,
    get_policy,
    normalize_threshold,
)
from goldpos.services.ownership_validator import (
    OwnershipPosition,
    percent_label,
    validate_for_sale,
    validate_for_transfer,
    validate_for_inventory_adjustment,
)


def _position(owned, total='100', paid=None, cost='1000', terminal=False):
    owned = Decimal(owned)
    total = Decimal(total)
    cost = Decimal(cost)
    paid = Decimal(paid) if paid is not None else (cost * owned / total).quantize(Decimal('0.01'))
    return OwnershipPosition(
        owned_quantity=owned,
        total_quantity=total,
        owned_weight=owned,
        total_weight=total,
        amount_paid=paid,
        outstanding_amount=cost - paid,
        ownership_percentage=(owned / total).quantize(Decimal('0.0001')),
        terminal=terminal,
    )


class TestValidateForSale:

    def test_blocked_below_threshold(self, make_policy):
        """30% owned with "prevent sale below 50%" enabled."""
        policy = make_policy(prevent_sale_below_threshold=True)
        result = validate_for_sale(_position('30'), 1, policy)

        assert result.allowed is False
        assert result.current_percentage == Decimal('0.3')
        assert result.reason == 'cannot complete sale: product ownership is 30%, below the 50% threshold'
        assert result.severity == SEVERITY_HIGH

    def test_low_ownership_allowed_when_rule_disabled(self, make_policy):
        result = validate_for_sale(_position('30'), 10, make_policy())

        assert result.allowed is True
        assert result.reason == 'Sale allowed with payment warnings'
        assert 'Low ownership percentage: 30%' in result.warnings
        assert any('partially paid' in w for w in result.warnings)

    def test_capacity_decides_when_not_blocked(self, make_policy):
        result = validate_for_sale(_position('30'), 31, make_policy())

        assert result.allowed is False
        assert 'insufficient owned quantity' in result.reason
        assert result.owned_quantity == Decimal('30')
        assert result.requested_quantity == Decimal('31')

    def test_fully_owned_sale_has_no_warnings(self, make_policy):
        result = validate_for_sale(_position('100'), 100, make_policy(prevent_sale_below_threshold=True))

        assert result.allowed is True
        assert result.reason == 'Sale validated successfully'
        assert result.warnings == []
        assert result.severity == SEVERITY_LOW

    def test_unpaid_warning(self, make_policy):
        result = validate_for_sale(_position('0', paid='0'), 1, make_policy())
        assert any('completely unpaid' in w for w in result.warnings)

    def test_closed_record_rejected(self, make_policy):
        result = validate_for_sale(_position('0', paid='1000', terminal=True), 1, make_policy())
        assert result.allowed is False
        assert result.reason.endswith('ownership record is closed')

    def test_accepts_records(self, make_record, make_policy):
        record = make_record(initial_payment=Decimal('4000'))
        result = validate_for_sale(record, 80, make_policy())
        assert result.allowed is True
        assert result.current_percentage == Decimal('0.8')

    def test_policy_from_app_config_by_default(self, app):
        result = validate_for_sale(_position('30'), 1)
        assert result.allowed is True


class TestTransferAndAdjustment:

    def test_transfer_gated_by_flag(self, make_policy):
        result = validate_for_transfer(_position('5'), 50, make_policy(enable_transfer_validation=False))
        assert result.allowed is True
        assert result.reason == 'Transfer validation disabled'

    def test_transfer_checks_owned_quantity(self, make_policy):
        result = validate_for_transfer(_position('5'), 6, make_policy())
        assert result.allowed is False
        assert result.reason.startswith('cannot complete transfer')

    def test_removal_needs_owned_capacity(self, make_policy):
        result = validate_for_inventory_adjustment(_position('5'), -6, make_policy())
        assert result.allowed is False
        assert result.requested_quantity == Decimal('-6')

    def test_addition_bounded_by_total(self, make_policy):
        policy = make_policy()
        assert validate_for_inventory_adjustment(_position('95'), 5, policy).allowed is True
        assert validate_for_inventory_adjustment(_position('95'), 6, policy).allowed is False

    def test_inventory_validation_disabled(self, make_policy):
        result = validate_for_inventory_adjustment(
            _position('5'), -60, make_policy(enable_inventory_validation=False)
        )
        assert result.allowed is True


class TestPolicy:

    @pytest.mark.parametrize('pct, expected', [
        ('0.10', SEVERITY_CRITICAL),
        ('0.2499', SEVERITY_CRITICAL),
        ('0.25', SEVERITY_HIGH),
        ('0.49', SEVERITY_HIGH),
        ('0.5', SEVERITY_MEDIUM),
        ('0.79', SEVERITY_MEDIUM),
        ('0.8', SEVERITY_LOW),
        ('1', SEVERITY_LOW),
    ])
    def test_severity_bands(self, pct, expected):
        assert ConfiguredOwnershipPolicy().severity(Decimal(pct)) == expected

    def test_severity_never_blocks(self):
        policy = ConfiguredOwnershipPolicy()
        assert policy.severity(Decimal('0')) == SEVERITY_CRITICAL
        assert policy.blocks_sale(Decimal('0')) is False

    def test_outstanding_severity(self):
        policy = ConfiguredOwnershipPolicy(OwnershipSettings(outstanding_alert_amount=Decimal('500')))
        assert policy.outstanding_severity(Decimal('500.01')) == SEVERITY_HIGH
        assert policy.outstanding_severity(Decimal('500')) == SEVERITY_MEDIUM

    def test_settings_from_mapping_normalizes_percentages(self):
        settings = OwnershipSettings.from_mapping({
            'OWNERSHIP_LOW_THRESHOLD': 50,
            'OWNERSHIP_HIGH_THRESHOLD': '90',
            'OWNERSHIP_CRITICAL_THRESHOLD': 0.1,
            'OWNERSHIP_PREVENT_SALE_BELOW_THRESHOLD': 'true',
            'OWNERSHIP_ENABLE_TRANSFER_VALIDATION': 'off',
        })

        assert settings.low_threshold == Decimal('0.5')
        assert settings.high_threshold == Decimal('0.9')
        assert settings.critical_threshold == Decimal('0.1')
        assert settings.prevent_sale_below_threshold is True
        assert settings.enable_transfer_validation is False
        assert settings.enable_inventory_validation is True

    def test_misordered_thresholds_rejected(self):
        with pytest.raises(OwnershipPolicyError):
            OwnershipSettings.from_mapping({'OWNERSHIP_LOW_THRESHOLD': '0.9', 'OWNERSHIP_HIGH_THRESHOLD': '0.6'})

    @pytest.mark.parametrize('value', ['-1', '150', 'half'])
    def test_bad_threshold_values(self, value):
        with pytest.raises(OwnershipPolicyError):
            normalize_threshold(value, field='threshold')

    def test_get_policy_reads_app_config(self, app):
        app.config['OWNERSHIP_LOW_THRESHOLD'] = '60'
        try:
            assert get_policy().low_threshold == Decimal('0.6')
        finally:
            app.config['OWNERSHIP_LOW_THRESHOLD'] = '0.50'

    @pytest.mark.parametrize('fraction, label', [
        (Decimal('0.3'), '30%'),
        (Decimal('0.425'), '42.5%'),
        (Decimal('1'), '100%'),
        (Decimal('0'), '0%'),
    ])
    def test_percent_label(self, fraction, label):
        assert percent_label(fraction) == label
