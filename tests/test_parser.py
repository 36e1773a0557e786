"""
Tests for the telemetry decoder.

Covers required/optional fields, the legacy default for `sd`, value
validation and re-serialization to the broadcast wire format.
"""

from __future__ import annotations

import json

import pytest

from w3p_ups.parser import ChargingState, ParseError, UPSSample, decode_line, encode_sample

FULL_LINE = (
    '{"up":812,"pd":1,"pdo":2,"cc":1,"t":312,"vs":5000,"is":900,"vr":5100,"ir":800,'
    '"soc":87,"sd":85,"bv":8123,"ba":-412,"cs":2,"pg":1,"vi":15020,"ii":640,"ci":300,"cf":1}'
)


class TestDecodeLine:
    def test_full_line(self) -> None:
        s = decode_line(FULL_LINE)
        assert s.soc == 87
        assert s.shutdown_soc == 85
        assert s.input_voltage == 15020
        assert s.battery_voltage == 8123
        assert s.battery_current == -412
        assert s.charging_state is ChargingState.CHARGING
        assert s.power_good == 1
        assert s.temperature == 312
        assert s.uptime == 812
        assert s.source_current == 900
        assert s.charge_flag == 1

    def test_minimal_line_defaults(self) -> None:
        s = decode_line('{"soc":50,"vi":12000}')
        assert s.shutdown_soc == 0
        assert s.battery_current == 0
        assert s.charging_state is ChargingState.NOT_CHARGING
        assert s.uptime == 0

    def test_soc_and_shutdown_soc_are_independent(self) -> None:
        s = decode_line('{"soc":40,"sd":7,"vi":12000}')
        assert (s.soc, s.shutdown_soc) == (40, 7)

    def test_unknown_charging_state(self) -> None:
        s = decode_line('{"soc":50,"vi":12000,"cs":9}')
        assert s.charging_state is ChargingState.UNKNOWN
        assert s.charging_label == "Unknown"

    def test_unknown_keys_ignored(self) -> None:
        assert decode_line('{"soc":5,"vi":1,"fw":"1.2"}').soc == 5

    def test_surrounding_whitespace(self) -> None:
        assert decode_line('  {"soc":5,"vi":1}\r\n').soc == 5

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "   ",
            "not json",
            '{"soc":50,"vi":120',
            "[1,2,3]",
            '{"vi":12000}',
            '{"soc":50}',
            '{"soc":101,"vi":12000}',
            '{"soc":50,"sd":120,"vi":12000}',
            '{"soc":-1,"vi":12000}',
            '{"soc":50,"vi":-5}',
            '{"soc":"50","vi":12000}',
            '{"soc":50.5,"vi":12000}',
            '{"soc":true,"vi":12000}',
            '{"soc":50,"vi":12000,"bv":null}',
        ],
    )
    def test_malformed_lines_raise_parse_error(self, line: str) -> None:
        with pytest.raises(ParseError):
            decode_line(line)

    def test_parse_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            decode_line("garbage")

    def test_negative_battery_current_allowed(self) -> None:
        assert decode_line('{"soc":50,"vi":0,"ba":-2000}').battery_current == -2000


class TestSampleHelpers:
    def test_unit_conversions(self) -> None:
        s = UPSSample(soc=50, input_voltage=15020, battery_voltage=8123, temperature=312)
        assert s.input_voltage_v == pytest.approx(15.02)
        assert s.battery_voltage_v == pytest.approx(8.123)
        assert s.temperature_c == pytest.approx(31.2)

    def test_samples_are_immutable(self) -> None:
        s = UPSSample(soc=50, input_voltage=15020)
        with pytest.raises(AttributeError):
            s.soc = 10  # type: ignore[misc]


class TestEncodeSample:
    def test_uses_wire_keys_and_no_newline(self) -> None:
        text = encode_sample(decode_line(FULL_LINE))
        assert "\n" not in text
        data = json.loads(text)
        assert data["soc"] == 87
        assert data["sd"] == 85
        assert data["vi"] == 15020
        assert data["ba"] == -412
        assert data["cs"] == 2
        assert data["is"] == 900

    def test_encoded_sample_decodes_to_equal_sample(self) -> None:
        original = decode_line(FULL_LINE)
        assert decode_line(encode_sample(original)) == original
