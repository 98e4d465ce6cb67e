"""Tests for clinic-local date helpers."""

from __future__ import annotations

from datetime import date, datetime

import pytest

from dental_concierge.dates import (
    format_clinic_datetime,
    format_slot_label,
    format_time_12h,
    normalize_birth_date,
)


class TestLabels:
    def test_slot_label(self):
        assert format_slot_label("2026-01-20") == "Martes, 20 de enero"
        assert format_slot_label(date(2026, 3, 1)) == "Domingo, 1 de marzo"

    def test_clinic_datetime(self):
        moment = datetime(2025, 11, 4, 14, 30)
        assert format_clinic_datetime(moment) == "martes, 4 de noviembre de 2025, 14:30"

    @pytest.mark.parametrize(
        ("hhmm", "expected"),
        [("14:00", "2:00 pm"), ("09:30", "9:30 am"), ("00:00", "12:00 am"), ("12:00", "12:00 pm")],
    )
    def test_time_12h(self, hhmm, expected):
        assert format_time_12h(hhmm) == expected


class TestBirthDate:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("1990-03-05", "1990-03-05"),
            ("05/03/1990", "1990-03-05"),
            ("5-3-1990", "1990-03-05"),
            ("25.12.1985", "1985-12-25"),
            ("12/25/1985", "1985-12-25"),
            ("1985/25/12", "1985-12-25"),
        ],
    )
    def test_formats(self, raw, expected):
        assert normalize_birth_date(raw) == expected

    def test_two_digit_year_in_the_past_century(self):
        assert normalize_birth_date("05/03/90") == "1990-03-05"

    def test_unparseable_returned_unchanged(self):
        assert normalize_birth_date("cinco de marzo") == "cinco de marzo"

    def test_empty(self):
        assert normalize_birth_date("") is None
        assert normalize_birth_date(None) is None
