from __future__ import annotations
import json
from datetime import datetime
import pytest
from weather_analytics.errors import UnparseablePayload
from weather_analytics.ingestion.change_detection import WriteDecision, decide_lead_event, decide_page, decide_user
from weather_analytics.models.tables import Page, User
from weather_analytics.validation.messages import LeadEventMessage, PageMessage, UserMessage, decode_message
from conftest import lead_event_payload, page_payload, user_payload


def test_new_page_is_insert():
    page = PageMessage.model_validate(page_payload())
    assert decide_page(page, None) is WriteDecision.INSERT


def test_page_compares_modification_date_at_second_precision():
    page = PageMessage.model_validate(page_payload(modification_date="2024-05-01T09:00:00.750Z"))
    current = Page(modification_date=datetime(2024, 5, 1, 9, 0, 0, 120000))
    assert decide_page(page, current) is WriteDecision.NOOP


def test_page_timezone_offset_is_normalized():
    page = PageMessage.model_validate(page_payload(modification_date="2024-05-01T11:00:00+02:00"))
    current = Page(modification_date=datetime(2024, 5, 1, 9, 0, 0))
    assert decide_page(page, current) is WriteDecision.NOOP


def test_page_with_moved_modification_date_is_update():
    page = PageMessage.model_validate(page_payload(modification_date="2024-05-02T09:00:00Z"))
    current = Page(modification_date=datetime(2024, 5, 1, 9, 0, 0))
    assert decide_page(page, current) is WriteDecision.UPDATE


def test_user_changes_only_on_subscription_flip():
    user = UserMessage.model_validate(user_payload(is_subscriber=True, email="new@example.com"))
    assert decide_user(user, None) is WriteDecision.INSERT
    assert decide_user(user, User(is_subscriber=True, email="old@example.com")) is WriteDecision.NOOP
    assert decide_user(user, User(is_subscriber=False)) is WriteDecision.UPDATE


def test_lead_event_repeat_in_batch_is_noop():
    seen: set = set()
    assert decide_lead_event(("alpha", "ev-1"), seen) is WriteDecision.INSERT
    assert decide_lead_event(("alpha", "ev-1"), seen) is WriteDecision.NOOP
    assert decide_lead_event(("beta", "ev-1"), seen) is WriteDecision.INSERT


def test_decode_message_rejects_malformed_payload():
    with pytest.raises(UnparseablePayload) as exc:
        decode_message(PageMessage, b"{not json")
    assert exc.value.reason == "malformed_payload"
    with pytest.raises(UnparseablePayload):
        decode_message(PageMessage, b'{"brand": "alpha"}')


@pytest.mark.parametrize("metas,time_spent", [
    ({"timeSpent": 12}, 12.0),
    ({"timeSpent": "12.5"}, 12.5),
    ({"timeSpent": "soon"}, None),
    ({"timeSpent": True}, None),
    ({"timeSpent": {"value": 3}}, None),
    (None, None),
])
def test_lead_event_metas_are_lenient(metas, time_spent):
    event = decode_message(LeadEventMessage, json.dumps(lead_event_payload(metas=metas)).encode())
    assert event.metas.time_spent == time_spent
