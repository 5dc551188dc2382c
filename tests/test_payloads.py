"""Tests for typed payloads and field policies."""

from __future__ import annotations

import pytest

from fieldsync import payloads
from fieldsync.payloads import (
    DEFAULT_POLICY,
    QUOTE_POLICY,
    FieldPolicy,
    GenericPayload,
    JobPayload,
    QuotePayload,
    get_field_policy,
    parse_payload,
    payload_to_dict,
    register_field_policy,
)


class TestParsePayload:
    """Tests for converting opaque payloads into typed models."""

    def test_quote(self) -> None:
        data = {"customer_name": "Ada", "status": "sent", "site_photo": "p1.jpg"}

        quote = parse_payload("quote", data)

        assert isinstance(quote, QuotePayload)
        assert quote.customer_name == "Ada"
        assert quote.status == "sent"
        assert quote.jobs == []
        assert quote.extra == {"site_photo": "p1.jpg"}

    def test_job(self) -> None:
        job = parse_payload("job", {"quote_id": "q-1", "job_type": "fence", "subtotal": 980.5})

        assert isinstance(job, JobPayload)
        assert job.quote_id == "q-1"
        assert job.subtotal == 980.5

    def test_unknown_type(self) -> None:
        """Unregistered types keep the raw dictionary."""
        generic = parse_payload("invoice", {"amount": 10})

        assert isinstance(generic, GenericPayload)
        assert generic.entity_type == "invoice"
        assert generic.data == {"amount": 10}


class TestPayloadToDict:
    """Tests for converting typed models back to opaque payloads."""

    def test_unset_fields_are_dropped(self) -> None:
        data = payload_to_dict(QuotePayload(customer_name="Ada"))

        assert data["customer_name"] == "Ada"
        assert data["status"] == "draft"
        assert "customer_email" not in data
        assert "extra" not in data

    def test_unknown_fields_survive(self) -> None:
        original = {"quote_id": "q-1", "job_type": "deck", "colour": "oak"}

        data = payload_to_dict(parse_payload("job", original))

        assert data["colour"] == "oak"
        assert data["job_type"] == "deck"

    def test_generic(self) -> None:
        assert payload_to_dict(GenericPayload("invoice", {"amount": 10})) == {"amount": 10}


class TestFieldPolicy:
    """Tests for critical/non-critical classification."""

    @pytest.mark.parametrize(
        ("name", "critical"),
        [
            ("status", True),
            ("total_inc_gst", True),
            ("notes", False),
            ("metadata", False),
            ("visit_at", False),
            ("start_date", False),
            ("brand_new_field", True),
        ],
    )
    def test_quote_classification(self, name: str, critical: bool) -> None:
        assert QUOTE_POLICY.is_critical(name) is critical

    def test_declared_critical_beats_timestamp_suffix(self) -> None:
        policy = FieldPolicy(critical=frozenset({"accepted_at"}), non_critical=frozenset())

        assert policy.is_timestamp("accepted_at") is False
        assert policy.is_critical("accepted_at") is True

    def test_text_fields(self) -> None:
        assert QUOTE_POLICY.is_text("notes") is True
        assert QUOTE_POLICY.is_text("display_name") is False

    def test_default_policy(self) -> None:
        assert get_field_policy("invoice") is DEFAULT_POLICY
        assert get_field_policy("quote") is QUOTE_POLICY

    def test_register(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(payloads, "FIELD_POLICIES", dict(payloads.FIELD_POLICIES))
        policy = FieldPolicy(critical=frozenset({"amount"}), non_critical=frozenset({"memo"}))

        register_field_policy("invoice", policy)

        assert get_field_policy("invoice") is policy
