# tests/test_units_addresses.py
"""Tests for faucet_bot/core/units.py and faucet_bot/core/addresses.py."""
from __future__ import annotations

import pytest

from faucet_bot.core.addresses import find_address, is_valid_address
from faucet_bot.core.errors import InvalidAmountError
from faucet_bot.core.units import format_units, parse_units

VALID = "0x52908400098527886E0F7030069857D2E4169EE7"


class TestAddresses:
    def test_valid_mixed_case(self):
        assert is_valid_address(VALID)

    def test_surrounding_whitespace_allowed(self):
        assert is_valid_address(f"  {VALID} ")

    @pytest.mark.parametrize("value", [
        "",
        "0x1234",
        VALID[2:],
        VALID + "00",
        "0xZZ908400098527886E0F7030069857D2E4169EE7",
    ])
    def test_invalid(self, value):
        assert not is_valid_address(value)

    def test_find_in_free_text(self):
        assert find_address(f"please send to {VALID}, thanks!") == VALID

    def test_find_ignores_longer_hex(self):
        assert find_address("0x" + "a" * 64) is None

    def test_find_nothing(self):
        assert find_address("gm") is None
        assert find_address(None) is None


class TestUnits:
    def test_parse_fraction(self):
        assert parse_units("0.05", 18) == 5 * 10**16

    def test_parse_integer(self):
        assert parse_units("300", 18) == 300 * 10**18

    @pytest.mark.parametrize("value", ["abc", "0", "-1", "NaN", "Infinity", "1.5"])
    def test_parse_rejects(self, value):
        with pytest.raises(InvalidAmountError):
            parse_units(value, 0)

    def test_invalid_amount_is_value_error(self):
        with pytest.raises(ValueError):
            parse_units("x", 18)

    @pytest.mark.parametrize("amount,decimals,expected", [
        (5 * 10**16, 18, "0.05"),
        (300 * 10**18, 18, "300"),
        (0, 18, "0"),
        (1, 18, "0.000000000000000001"),
        (42, 0, "42"),
    ])
    def test_format(self, amount, decimals, expected):
        assert format_units(amount, decimals) == expected
