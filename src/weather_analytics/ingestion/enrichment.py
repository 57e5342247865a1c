"""Per-kind enrichment of decoded queue payloads.

Lead events get a geo location (offline GeoLite2 lookup, consent permitting) and
a referrer classification; pages get their declared locale checked against the
language detected in their content. The functions here do no I/O beyond the
geo database read.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from urllib.parse import urlsplit
import geoip2.errors
from langdetect import DetectorFactory, detect
from langdetect.lang_detect_exception import LangDetectException
from prometheus_client import Counter
from weather_analytics.errors import EnrichmentError, UnparseablePayload, ValidationFailure
from weather_analytics.validation.messages import LeadEventMessage, PageMessage

logger = logging.getLogger(__name__)

# langdetect is probabilistic; a fixed seed keeps the verdict stable across redeliveries
DetectorFactory.seed = 0

GEO_LOOKUPS = Counter('geo_lookups_total', 'Geo-IP lookups', ['result'])
LANGUAGE_MISMATCHES = Counter('page_language_mismatch_total', 'Pages rejected for locale/content language mismatch', ['brand'])

NO_GEO_EVENTS = {"page_behavior"}

SEARCH_HOSTS = ("google.", "bing.", "duckduckgo.", "yahoo.", "qwant.", "ecosia.", "baidu.", "yandex.")
SOCIAL_HOSTS = (
    "facebook.", "fb.", "t.co", "twitter.", "x.com", "linkedin.", "lnkd.in",
    "instagram.", "pinterest.", "reddit.", "tiktok.", "youtube.", "whatsapp.",
)
EMAIL_HOSTS = ("mail.", "outlook.", "webmail.")


@dataclass(frozen=True)
class Location:
    country: str = ""
    city: str = ""


EMPTY_LOCATION = Location()


def lookup_location(reader, ip: str) -> Location:
    """Resolve an IP address with a geoip2 City reader.

    Unknown or malformed addresses give an empty location; reader failures are
    raised as ``EnrichmentError`` so the message is redelivered.
    """
    try:
        resp = reader.city(ip)
    except geoip2.errors.AddressNotFoundError:
        GEO_LOOKUPS.labels(result="not_found").inc()
        return EMPTY_LOCATION
    except ValueError:
        GEO_LOOKUPS.labels(result="invalid_ip").inc()
        logger.warning(f"Invalid IP address {ip!r}, storing empty location")
        return EMPTY_LOCATION
    except (geoip2.errors.GeoIP2Error, RuntimeError, OSError) as e:
        GEO_LOOKUPS.labels(result="error").inc()
        raise EnrichmentError(f"geo lookup failed for {ip}: {e}") from e
    GEO_LOOKUPS.labels(result="ok").inc()
    return Location(country=resp.country.name or "", city=resp.city.name or "")


def _host(url: str) -> str:
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def classify_referrer(url: str, referrer: str) -> str:
    if not referrer:
        return "direct"
    ref_host = _host(referrer)
    if ref_host and ref_host == _host(url):
        return "internal"
    for medium, hosts in (("search", SEARCH_HOSTS), ("social", SOCIAL_HOSTS), ("email", EMAIL_HOSTS)):
        if any(ref_host.startswith(h) or f".{h}" in ref_host for h in hosts):
            return medium
    return "unknown"


@dataclass
class EnrichedLeadEvent:
    event: LeadEventMessage
    location: Location
    ip: str
    referrer_type: str


def enrich_lead_event(event: LeadEventMessage, reader) -> EnrichedLeadEvent:
    location = EMPTY_LOCATION
    if event.consent and event.ip and event.name not in NO_GEO_EVENTS:
        if reader is None:
            raise EnrichmentError("geo reader not configured")
        location = lookup_location(reader, event.ip)
    referrer_type = event.referrer_type or classify_referrer(event.url, event.referrer)
    return EnrichedLeadEvent(
        event=event,
        location=location,
        ip=event.ip,
        referrer_type=referrer_type,
    )


def parse_locale_base(locale: str) -> str:
    """Return the primary language subtag of a BCP-47 style locale ("fr-FR" -> "fr")."""
    base = locale.strip().replace("_", "-").split("-", 1)[0].lower()
    if not base or not base.isalpha() or not 2 <= len(base) <= 3:
        raise UnparseablePayload("invalid_locale", repr(locale))
    return base


def detect_language(text: str) -> str:
    try:
        return detect(text)
    except LangDetectException as e:
        raise ValidationFailure("undetectable_language", str(e)) from e


def validate_page_language(page: PageMessage, detector=detect_language) -> str:
    """Check the declared locale against the content; returns the language code."""
    declared = parse_locale_base(page.language)
    text = " ".join(p for p in (page.title, page.description, page.content) if p)
    detected = detector(text).split("-", 1)[0].lower()
    if detected != declared:
        LANGUAGE_MISMATCHES.labels(brand=page.brand).inc()
        raise ValidationFailure("language_mismatch", f"{page.url}: content={detected} locale={declared}")
    return declared
