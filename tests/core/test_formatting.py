"""Tests for dockyard.core.formatting."""

from datetime import UTC, datetime

import pytest

from dockyard.core.formatting import convert_to_bytes, format_bytes, log_line, slugify


class TestFormatBytes:
    """Binary units, trailing zeros dropped."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (0, "0 B"),
            (512, "512 B"),
            (1024, "1 KB"),
            (1536, "1.5 KB"),
            (1048576, "1 MB"),
            (1073741824, "1 GB"),
        ],
    )
    def test_renders_units(self, value, expected):
        """Exact unit boundaries render as whole numbers."""
        assert format_bytes(value) == expected

    def test_precision(self):
        """Precision caps the decimals."""
        assert format_bytes(1234567, precision=1) == "1.2 MB"

    def test_negative_clamped(self):
        """Negative sizes render as zero."""
        assert format_bytes(-5) == "0 B"


class TestConvertToBytes:
    """Parsing human-readable sizes."""

    def test_round_trip_at_boundaries(self):
        """Canonical unit boundaries survive format → parse."""
        for value in (1024, 1048576, 1073741824):
            assert convert_to_bytes(format_bytes(value)) == value

    def test_iec_suffixes(self):
        """KiB/MiB are always binary."""
        assert convert_to_bytes("2KiB") == 2048
        assert convert_to_bytes("1.5 MiB") == 1572864

    def test_si_mode(self):
        """si=True reads plain suffixes as powers of 1000."""
        assert convert_to_bytes("1 KB", si=True) == 1000
        assert convert_to_bytes("2.5MB", si=True) == 2500000
        assert convert_to_bytes("1 KiB", si=True) == 1024

    def test_case_insensitive(self):
        assert convert_to_bytes("1 kb") == 1024

    def test_unparseable_is_zero(self):
        assert convert_to_bytes("lots") == 0
        assert convert_to_bytes("") == 0


class TestSlugify:
    def test_basic(self):
        assert slugify("Acme Corp!") == "acme-corp"

    def test_collapses_separators(self):
        assert slugify("  My__Team -- Name ") == "my-team-name"

    def test_strips_accents(self):
        assert slugify("Café Déjà") == "cafe-deja"


class TestLogLine:
    def test_prefixes_timestamp(self):
        at = datetime(2025, 1, 9, 12, 0, 0, tzinfo=UTC)
        assert log_line("Building image", at) == "[2025-01-09 12:00:00] Building image"
