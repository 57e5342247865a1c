from __future__ import annotations
import pytest
from weather_analytics.errors import EnrichmentError, UnparseablePayload, ValidationFailure
from weather_analytics.ingestion.enrichment import (
    EMPTY_LOCATION, classify_referrer, enrich_lead_event, lookup_location, parse_locale_base, validate_page_language,
)
from weather_analytics.validation.messages import LeadEventMessage, PageMessage
from conftest import FakeGeoReader, lead_event_payload, page_payload


def test_lookup_location_resolves_known_address():
    loc = lookup_location(FakeGeoReader(), "81.2.69.142")
    assert (loc.country, loc.city) == ("United Kingdom", "London")


def test_lookup_location_missing_city_is_empty_string():
    loc = lookup_location(FakeGeoReader(), "2.125.160.216")
    assert loc.city == ""


def test_unknown_and_invalid_addresses_give_empty_location():
    reader = FakeGeoReader()
    assert lookup_location(reader, "192.0.2.1") == EMPTY_LOCATION
    assert lookup_location(reader, "not-an-ip") == EMPTY_LOCATION


def test_reader_failure_is_enrichment_error():
    with pytest.raises(EnrichmentError):
        lookup_location(FakeGeoReader(broken={"10.0.0.1"}), "10.0.0.1")


def test_consent_keeps_ip_and_resolves_location():
    event = LeadEventMessage.model_validate(lead_event_payload(consent=True))
    enriched = enrich_lead_event(event, FakeGeoReader())
    assert enriched.ip == "81.2.69.142"
    assert enriched.location.country == "United Kingdom"
    assert enriched.referrer_type == "search"


def test_no_consent_keeps_ip_and_skips_lookup():
    reader = FakeGeoReader()
    event = LeadEventMessage.model_validate(lead_event_payload(consent=False))
    enriched = enrich_lead_event(event, reader)
    assert enriched.ip == "81.2.69.142"
    assert enriched.location == EMPTY_LOCATION
    assert reader.lookups == []


def test_behavior_events_skip_geo_lookup():
    reader = FakeGeoReader()
    event = LeadEventMessage.model_validate(lead_event_payload(name="page_behavior"))
    enrich_lead_event(event, reader)
    assert reader.lookups == []


def test_missing_reader_with_consent_is_enrichment_error():
    event = LeadEventMessage.model_validate(lead_event_payload(consent=True))
    with pytest.raises(EnrichmentError):
        enrich_lead_event(event, None)


def test_declared_referrer_type_wins():
    event = LeadEventMessage.model_validate(lead_event_payload(referrer_type="newsletter"))
    assert enrich_lead_event(event, FakeGeoReader()).referrer_type == "newsletter"


@pytest.mark.parametrize("referrer,expected", [
    ("", "direct"),
    ("https://www.weather.example/other", "internal"),
    ("https://www.google.com/search?q=rain", "search"),
    ("https://t.co/abc", "social"),
    ("https://outlook.live.com/mail", "email"),
    ("https://blog.example.org/post", "unknown"),
])
def test_classify_referrer(referrer, expected):
    assert classify_referrer("https://weather.example/news", referrer) == expected


def test_parse_locale_base():
    assert parse_locale_base("fr-FR") == "fr"
    assert parse_locale_base("en_GB") == "en"
    assert parse_locale_base("DE") == "de"
    with pytest.raises(UnparseablePayload) as exc:
        parse_locale_base("")
    assert exc.value.reason == "invalid_locale"
    assert exc.value.permanent is False


def test_page_language_mismatch_is_validation_failure():
    page = PageMessage.model_validate(page_payload(language="fr-FR"))
    with pytest.raises(ValidationFailure) as exc:
        validate_page_language(page, lambda text: "en")
    assert exc.value.reason == "language_mismatch"


def test_page_language_match_returns_code():
    page = PageMessage.model_validate(page_payload(language="en-GB"))
    assert validate_page_language(page, lambda text: "en") == "en"
