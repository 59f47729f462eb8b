"""
Tests for call-data normalization.
"""

import pytest

from intake_workflow.exceptions import ValidationError
from intake_workflow.normalizer import (
    build_street_address,
    clean_phone,
    convert_verbal_to_numeric,
    format_date_for_athena,
    get_state_abbreviation,
    normalize_email,
    normalize_sex,
    normalize_zip,
    parse_date,
    parse_time,
    prepare_patient_fields,
    validate_intake_minimum,
)


class TestVerbalNumbers:

    @pytest.mark.parametrize("spoken,expected", [
        ("42", "42"),
        ("twenty three", "23"),
        ("one two three", "123"),
        ("one twenty three", "123"),
        ("four fifty", "450"),
        ("two thousand fifteen", "2015"),
        ("five hundred", "500"),
        ("4th", "4"),
    ])
    def test_spoken_numbers(self, spoken, expected):
        assert convert_verbal_to_numeric(spoken) == expected

    def test_non_numeric_text_unchanged(self):
        assert convert_verbal_to_numeric("  Elm ") == "Elm"

    def test_empty(self):
        assert convert_verbal_to_numeric(None) == ""

    def test_street_address(self):
        assert build_street_address("one twenty three", 'Main "Street"') == "123 Main Street"
        assert build_street_address(None, "Main Street") == "Main Street"


class TestDates:

    @pytest.mark.parametrize("raw,athena", [
        ("1990-01-15", "01/15/1990"),
        ("01/15/1990", "01/15/1990"),
        ("January 15th, 1990", "01/15/1990"),
        ("15 March 1982", "03/15/1982"),
    ])
    def test_athena_format_from_any_input(self, raw, athena):
        assert format_date_for_athena(parse_date(raw)) == athena

    def test_missing_year_rejected(self):
        assert parse_date("January 15") is None

    def test_garbage_rejected(self):
        assert parse_date("not a date") is None
        assert parse_date("") is None

    def test_non_iso_passes_through(self):
        assert format_date_for_athena("01/15/1990") == "01/15/1990"

    def test_parse_time(self):
        assert parse_time("10:30 AM") == "10:30"
        assert parse_time("3:30 PM") == "15:30"
        assert parse_time("14:00") == "14:00"
        assert parse_time("whenever") is None


class TestContactFields:

    def test_phone_strips_country_code(self):
        assert clean_phone("1-555-234-5678") == "5552345678"
        assert clean_phone("+1 (555) 234 5678") == "5552345678"

    def test_phone_nanp_violations(self):
        # Area code and exchange may not start with 0 or 1
        assert clean_phone("055-234-5678") == ""
        assert clean_phone("555-134-5678") == ""
        assert clean_phone("12345") == ""

    def test_sex(self):
        assert normalize_sex("female") == "F"
        assert normalize_sex("M") == "M"
        assert normalize_sex("unknown") == ""

    def test_state_abbreviation(self):
        assert get_state_abbreviation("New York") == "NY"
        assert get_state_abbreviation("tx") == "TX"

    def test_zip(self):
        assert normalize_zip("78701") == "78701"
        assert normalize_zip("78701-1234") == "78701"
        assert normalize_zip("787") == ""

    def test_email(self):
        assert normalize_email(" Maria.Lopez @Example.com ") == "maria.lopez@example.com"
        assert normalize_email("not-an-email") == ""


class TestPatientFields:

    def test_minimum_validation(self):
        assert validate_intake_minimum("Maria", "Lopez", "1985-04-12") == []
        errors = validate_intake_minimum("", "Lopez", "sometime")
        assert len(errors) == 2

    def test_builds_form_fields(self):
        fields = prepare_patient_fields({
            "first_name": "Maria",
            "last_name": "Lopez",
            "date_of_birth": "1985-04-12",
            "phone": "555.234.5678",
            "house_number": "one twenty three",
            "street": "Main Street",
            "state": "Texas",
            "zip": "78701",
            "sex": "female",
        }, department_id="1")

        assert fields["firstname"] == "Maria"
        assert fields["dob"] == "04/12/1985"
        assert fields["departmentid"] == "1"
        assert fields["mobilephone"] == "5552345678"
        assert fields["address1"] == "123 Main Street"
        assert fields["state"] == "TX"
        assert fields["sex"] == "F"
        assert "email" not in fields

    def test_missing_birth_date_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            prepare_patient_fields({"first_name": "Maria", "last_name": "Lopez", "phone": "5552345678"}, "1")
        assert "date_of_birth is required" in exc_info.value.errors

    def test_contact_method_required(self):
        with pytest.raises(ValidationError) as exc_info:
            prepare_patient_fields({"first_name": "Maria", "last_name": "Lopez", "date_of_birth": "1985-04-12"}, "1")
        assert any("contact method" in e for e in exc_info.value.errors)
