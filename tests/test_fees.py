# tests/test_fees.py
"""Tests for platform fee arithmetic"""
import pytest

from app.core.jobs.fees import platform_fee, split_payout


class TestPlatformFee:
    @pytest.mark.parametrize("price,percent,fee", [
        (10000, 15, 1500),
        (333, 15, 50),      # 49.95 rounds up
        (130, 5, 7),        # 6.5 rounds half-up
        (100, 0, 0),
        (999, 100, 999),
        (101, 12.5, 13),    # 12.625
    ])
    def test_rounding(self, price, percent, fee):
        assert platform_fee(price, percent) == fee

    def test_split_sums_to_price(self):
        split = split_payout(333, 15)
        assert split.fee_amount == 50
        assert split.transfer_amount == 283
        assert split.fee_amount + split.transfer_amount == split.price_amount

    def test_split_records_percent(self):
        split = split_payout(10000, 15.0)
        assert split.fee_percent == 15.0
        assert split.transfer_amount == 8500
