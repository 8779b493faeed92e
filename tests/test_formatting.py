"""Tests for record formatting."""

import locale

import pytest

from trident.formatting import (
    format_cpu,
    format_cpufreq,
    format_procinfo,
    format_thermal,
    parse_cpu,
    parse_cpufreq,
    parse_procinfo,
    parse_thermal,
    percent,
)


class TestProcinfo:
    def test_format(self):
        assert format_procinfo("nginx", 12.34, 1.06, 1048576, 8388608) == (
            "nginx|12.3|1.1|13.4|1048576|8388608"
        )

    def test_total_is_sum_of_unrounded_parts(self):
        record = parse_procinfo(format_procinfo("g", 0.04, 0.04, 0, 0))
        assert record.user_pct == 0.0
        assert record.total_pct == 0.1

    def test_group_with_pipe_parses(self):
        record = parse_procinfo(format_procinfo("a|b", 1.0, 2.0, 3, 4))
        assert record.group == "a|b"
        assert record.resident_bytes == 3
        assert record.virtual_bytes == 4


class TestCPU:
    def test_format(self):
        assert format_cpu("cpu0", 50.0, 25.0, 25.0) == "cpu0|50.0|25.0|25.0|75.0"

    def test_parse(self):
        record = parse_cpu("cpu|1.5|0.5|98.0|2.0")
        assert record.name == "cpu"
        assert record.idle_pct == 98.0
        assert record.total_pct == 2.0


class TestCPUFreq:
    def test_format_keeps_order(self):
        assert format_cpufreq({"0": 1_800_000_000, "1": 600_000_000}) == (
            "0:1800000000|1:600000000"
        )

    def test_parse(self):
        assert parse_cpufreq("0:1800000000|4:2400000000") == {
            "0": 1_800_000_000,
            "4": 2_400_000_000,
        }


class TestThermal:
    def test_pads_to_seven(self):
        assert format_thermal([45.25, 50.0]) == "45.2|50.0|0.0|0.0|0.0|0.0|0.0"

    def test_truncates_to_seven(self):
        assert len(parse_thermal(format_thermal([1.0] * 10))) == 7


class TestPercent:
    def test_share_of_interval(self):
        assert percent(1.5, 3.0) == 50.0

    def test_divided_across_cpus(self):
        assert percent(3.0, 3.0, cpus=4) == 25.0

    def test_degenerate_inputs(self):
        assert percent(1.0, 0.0) == 0.0
        assert percent(1.0, 1.0, cpus=0) == 0.0


def test_format_ignores_locale():
    """Decimal separator stays '.' whatever LC_NUMERIC says."""
    previous = locale.setlocale(locale.LC_NUMERIC)
    for name in ("de_DE.UTF-8", "fr_FR.UTF-8"):
        try:
            locale.setlocale(locale.LC_NUMERIC, name)
            break
        except locale.Error:
            continue
    else:
        pytest.skip("no comma-decimal locale installed")
    try:
        assert format_cpu("cpu", 1.5, 2.5, 96.0) == "cpu|1.5|2.5|96.0|4.0"
    finally:
        locale.setlocale(locale.LC_NUMERIC, previous)
