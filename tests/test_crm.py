"""Tests for the CRM adapter (simulated mode and a mocked Pipefy pipe)."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from sdr_agent.errors import SchemaUnavailable
from sdr_agent.models import Lead, UpsertAction
from sdr_agent.services.crm import (
    SIMULATED_DUPLICATE_EMAIL,
    SIMULATED_DUPLICATE_RECORD_ID,
    CRMAdapter,
)
from sdr_agent.services.pipefy_client import PipefyAPIError
from sdr_agent.services.schema_resolver import SchemaResolver

PIPE_FIELDS = [
    {"id": "f_name", "label": "Nome", "type": "short_text"},
    {"id": "f_email", "label": "E-mail", "type": "email"},
    {"id": "f_company", "label": "Empresa", "type": "short_text"},
    {"id": "f_need", "label": "Necessidade", "type": "long_text"},
    {"id": "f_interest", "label": "Interesse", "type": "radio_vertical"},
    {"id": "f_link", "label": "Link da Reunião", "type": "short_text"},
    {"id": "f_date", "label": "Data da Reunião", "type": "date"},
]


def _card(card_id, email, **values):
    fields = [{"name": "E-mail", "value": email, "field": {"id": "f_email"}}]
    for field_id, value in values.items():
        fields.append({"name": field_id, "value": value, "field": {"id": field_id}})
    return {"id": card_id, "title": "card", "fields": fields}


@pytest.fixture
def pipefy():
    client = MagicMock()
    client.get_start_form_fields.return_value = PIPE_FIELDS
    client.iter_cards.return_value = iter([])
    client.create_card.return_value = {"id": "301", "created_at": "2025-01-01T10:00:00Z"}
    return client


@pytest.fixture
def crm(pipefy):
    return CRMAdapter(pipefy, SchemaResolver(pipefy), true_label="Sim", false_label="Não")


@pytest.fixture
def simulated_crm():
    return CRMAdapter(None, SchemaResolver(None))


LEAD = Lead(
    name="Ana Souza",
    email="Ana@Globex.com ",
    company="Globex",
    need="Automate lead intake",
    interest_confirmed=True,
)


class TestSimulatedMode:
    def test_new_email_is_created(self, simulated_crm):
        result = simulated_crm.upsert_lead(LEAD)
        assert result.action == UpsertAction.CREATED
        assert result.simulated is True
        assert result.record_id.startswith("sim_card_")

    def test_known_duplicate_is_updated(self, simulated_crm):
        result = simulated_crm.upsert_lead(Lead(name="Dup", email=SIMULATED_DUPLICATE_EMAIL))
        assert result.action == UpsertAction.UPDATED
        assert result.record_id == SIMULATED_DUPLICATE_RECORD_ID

    def test_same_email_twice_never_creates_twice(self, simulated_crm):
        first = simulated_crm.upsert_lead(LEAD)
        second = simulated_crm.upsert_lead(LEAD.model_copy(update={"email": "ana@globex.com"}))
        assert second.action == UpsertAction.UPDATED
        assert second.record_id == first.record_id

    def test_find_record_by_email(self, simulated_crm):
        assert simulated_crm.find_record_by_email("nobody@example.com") is None
        record = simulated_crm.find_record_by_email(" DUPLICATE@example.com")
        assert record.id == SIMULATED_DUPLICATE_RECORD_ID

    def test_attach_meeting_reports_both_fields(self, simulated_crm):
        result = simulated_crm.attach_meeting(
            "sim_card_1", "https://meet.example.com/x", datetime(2025, 1, 2, 10),
        )
        assert result.updated_fields == ["meeting_link", "meeting_date"]


class TestUpsertLead:
    def test_creates_card_with_mapped_fields(self, crm, pipefy):
        result = crm.upsert_lead(LEAD)

        assert result.action == UpsertAction.CREATED
        assert result.record_id == "301"
        fields = {f["field_id"]: f["field_value"] for f in pipefy.create_card.call_args[0][0]}
        assert fields == {
            "f_name": "Ana Souza",
            "f_email": "Ana@Globex.com",
            "f_company": "Globex",
            "f_need": "Automate lead intake",
            "f_interest": "Sim",
        }

    def test_omitted_fields_are_not_sent(self, crm, pipefy):
        crm.upsert_lead(Lead(name="Bo", email="bo@x.com"))
        field_ids = [f["field_id"] for f in pipefy.create_card.call_args[0][0]]
        assert field_ids == ["f_name", "f_email"]

    def test_existing_record_is_updated_field_by_field(self, crm, pipefy):
        pipefy.iter_cards.return_value = iter(
            [
                _card("7", "someone@else.com"),
                _card("8", "Ana@Globex.com", f_name="Ana Souza", f_company="Old Co"),
            ]
        )
        result = crm.upsert_lead(LEAD)

        assert result.action == UpsertAction.UPDATED
        assert result.record_id == "8"
        pipefy.create_card.assert_not_called()
        updated = {c[0][1] for c in pipefy.update_card_field.call_args_list}
        # name and email already match
        assert updated == {"f_company", "f_need", "f_interest"}

    def test_identical_record_is_no_changes(self, crm, pipefy):
        pipefy.iter_cards.return_value = iter(
            [
                _card(
                    "8", "Ana@Globex.com",
                    f_name="Ana Souza", f_company="Globex",
                    f_need="Automate lead intake", f_interest="Sim",
                )
            ]
        )
        result = crm.upsert_lead(LEAD)
        assert result.action == UpsertAction.NO_CHANGES
        pipefy.update_card_field.assert_not_called()

    def test_missing_email_field_is_schema_unavailable(self, pipefy):
        pipefy.get_start_form_fields.return_value = [
            {"id": "f_name", "label": "Nome", "type": "short_text"},
        ]
        crm = CRMAdapter(pipefy, SchemaResolver(pipefy))
        with pytest.raises(SchemaUnavailable):
            crm.upsert_lead(LEAD)
        pipefy.create_card.assert_not_called()

    def test_upstream_errors_propagate(self, crm, pipefy):
        pipefy.create_card.side_effect = PipefyAPIError("boom", status_code=500)
        with pytest.raises(PipefyAPIError):
            crm.upsert_lead(LEAD)


class TestAttachMeeting:
    def test_writes_link_and_date(self, crm, pipefy):
        result = crm.attach_meeting("8", "https://meet.google.com/abc", datetime(2025, 1, 2, 10))
        assert result.updated_fields == ["meeting_link", "meeting_date"]
        calls = {c[0][1]: c[0][2] for c in pipefy.update_card_field.call_args_list}
        assert calls == {"f_link": "https://meet.google.com/abc", "f_date": "2025-01-02"}

    def test_no_meeting_fields_is_not_an_error(self, pipefy):
        pipefy.get_start_form_fields.return_value = PIPE_FIELDS[:2]
        crm = CRMAdapter(pipefy, SchemaResolver(pipefy))
        result = crm.attach_meeting("8", "https://meet.google.com/abc", datetime(2025, 1, 2, 10))
        assert result.updated_fields == []
        assert result.message == "No meeting fields configured"
        pipefy.update_card_field.assert_not_called()
