from __future__ import annotations
import dataclasses
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from weather_analytics.errors import WarehouseError
from weather_analytics.ingestion.committer import DualWriteCommitter
from weather_analytics.ingestion.handlers import handler_for
from weather_analytics.models.tables import Page, User
from weather_analytics.tasks.reconcile import reconcile_warehouse_job
from conftest import lead_event_payload, make_message, page_payload, user_payload


class BrokenWarehouse:
    def insert_rows(self, table, rows):
        raise WarehouseError("warehouse unavailable")


def _committer(ctx, kind):
    return DualWriteCommitter(ctx, handler_for(kind, ctx))


def _count(warehouse, table):
    return warehouse.query(f"SELECT COUNT(*) AS n FROM {warehouse.table(table)}")[0]["n"]


def test_page_insert_then_redelivery_is_noop(ctx, session):
    committer = _committer(ctx, "page")
    first = make_message(page_payload())
    outcome = committer.process_batch([first])
    assert first.state == "ack"
    assert outcome.inserted == 1
    assert _count(ctx.warehouse, "page") == 1

    again = make_message(page_payload())
    outcome = committer.process_batch([again])
    assert again.state == "ack"
    assert outcome.noop == 1
    assert _count(ctx.warehouse, "page") == 1
    assert len(session.execute(select(Page)).scalars().all()) == 1


def test_page_update_resets_content_vector(ctx, session):
    committer = _committer(ctx, "page")
    committer.process_batch([make_message(page_payload())])
    page = session.execute(select(Page)).scalar_one()
    page.content_vector = {"rain": 1}
    session.commit()

    outcome = committer.process_batch([make_message(page_payload(
        modification_date="2024-05-02T09:00:00Z", content="Sunshine returns to the region tomorrow",
    ))])
    assert outcome.updated == 1
    session.expire_all()
    page = session.execute(select(Page)).scalar_one()
    assert page.content == "Sunshine returns to the region tomorrow"
    assert page.content_vector is None
    assert _count(ctx.warehouse, "page") == 2


def test_language_mismatch_is_acked_and_dropped(ctx, session):
    committer = _committer(ctx, "page")
    mismatch = make_message(page_payload(language="fr-FR"))
    outcome = committer.process_batch([mismatch])
    assert mismatch.state == "ack"
    assert outcome.dropped == 1
    assert outcome.nacked == 0
    assert outcome.drop_reasons == {"language_mismatch": 1}
    assert session.execute(select(Page)).first() is None
    assert _count(ctx.warehouse, "page") == 0


def test_unparseable_payload_and_locale_are_nacked(ctx, session):
    committer = _committer(ctx, "page")
    malformed = make_message(b"{oops")
    bad_locale = make_message(page_payload(language="??"))
    good = make_message(page_payload())
    outcome = committer.process_batch([malformed, bad_locale, good])
    assert [malformed.state, bad_locale.state, good.state] == ["nack", "nack", "ack"]
    assert outcome.nacked == 2
    assert outcome.dropped == 0
    assert outcome.inserted == 1
    assert _count(ctx.warehouse, "page") == 1


def test_one_bad_message_does_not_affect_the_rest(ctx, session):
    committer = _committer(ctx, "user")
    good = make_message(user_payload(lead_uuid="lead-1"))
    bad = make_message(user_payload(lead_uuid=""))
    other = make_message(user_payload(lead_uuid="lead-2"))
    outcome = committer.process_batch([good, bad, other])
    assert [good.state, bad.state, other.state] == ["ack", "nack", "ack"]
    assert outcome.inserted == 2
    assert outcome.nacked == 1
    assert {u.lead_uuid for u in session.execute(select(User)).scalars()} == {"lead-1", "lead-2"}


def test_user_subscription_flip_is_update(ctx, session):
    committer = _committer(ctx, "user")
    committer.process_batch([make_message(user_payload())])
    outcome = committer.process_batch([make_message(user_payload(is_subscriber=True))])
    assert outcome.updated == 1
    assert session.execute(select(User.is_subscriber)).scalar_one() is True


def test_lead_event_with_consent_is_enriched(ctx):
    msg = make_message(lead_event_payload(consent=True, ip="81.2.69.142"))
    outcome = _committer(ctx, "lead_event").process_batch([msg])
    assert msg.state == "ack"
    assert outcome.inserted == 1
    [row] = ctx.warehouse.query(
        f"SELECT ip, location_country, location_city, referrer_type, time_spent FROM {ctx.warehouse.table('lead_event')}"
    )
    assert row == {
        "ip": "81.2.69.142",
        "location_country": "United Kingdom",
        "location_city": "London",
        "referrer_type": "search",
        "time_spent": 30.0,
    }


def test_lead_event_without_consent_stores_ip_but_no_location(ctx, geo_reader):
    msg = make_message(lead_event_payload(consent=False, ip="81.2.69.142"))
    _committer(ctx, "lead_event").process_batch([msg])
    [row] = ctx.warehouse.query(f"SELECT ip, location_country, location_city FROM {ctx.warehouse.table('lead_event')}")
    assert row == {"ip": "81.2.69.142", "location_country": "", "location_city": ""}
    assert geo_reader.lookups == []


def test_lead_event_with_non_numeric_metas_is_kept(ctx):
    msg = make_message(lead_event_payload(metas={"timeSpent": "n/a", "readingRate": "0.5", "scroll": [1, 2]}))
    outcome = _committer(ctx, "lead_event").process_batch([msg])
    assert msg.state == "ack"
    assert outcome.inserted == 1
    [row] = ctx.warehouse.query(f"SELECT time_spent, reading_rate FROM {ctx.warehouse.table('lead_event')}")
    assert row == {"time_spent": None, "reading_rate": 0.5}


def test_duplicate_lead_event_in_batch_is_written_once(ctx):
    payload = lead_event_payload(uuid="ev-dup")
    first, second = make_message(payload), make_message(payload)
    outcome = _committer(ctx, "lead_event").process_batch([first, second])
    assert first.state == "ack" and second.state == "ack"
    assert outcome.inserted == 1
    assert outcome.noop == 1
    assert _count(ctx.warehouse, "lead_event") == 1


def test_geo_failure_nacks_only_that_message(ctx):
    ok = make_message(lead_event_payload(ip="81.2.69.142"))
    failing = make_message(lead_event_payload(ip="10.0.0.1"))
    outcome = _committer(ctx, "lead_event").process_batch([ok, failing])
    assert ok.state == "ack"
    assert failing.state == "nack"
    assert outcome.nacked == 1
    assert _count(ctx.warehouse, "lead_event") == 1


def test_commit_failure_nacks_staged_messages(ctx, session):
    def failing_factory():
        s = ctx.session_factory()

        def _boom():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        s.commit = _boom
        return s

    broken = dataclasses.replace(ctx, session_factory=failing_factory)
    staged = make_message(page_payload())
    dropped = make_message(page_payload(url="https://alpha.example/fr/orage", language="fr-FR"))
    outcome = _committer(broken, "page").process_batch([staged, dropped])
    assert staged.state == "nack"
    assert dropped.state == "ack"
    assert outcome.commit_failed
    assert session.execute(select(Page)).first() is None
    assert _count(ctx.warehouse, "page") == 0


def test_warehouse_failure_after_commit_acks_and_reconcile_backfills(ctx, session, brands):
    broken = dataclasses.replace(ctx, warehouse=BrokenWarehouse())
    msg = make_message(page_payload())
    outcome = _committer(broken, "page").process_batch([msg])
    assert msg.state == "ack"
    assert outcome.warehouse_failed
    assert session.execute(select(Page)).scalar_one().url == page_payload()["url"]
    assert _count(ctx.warehouse, "page") == 0

    summary = reconcile_warehouse_job(ctx)
    assert summary["rows"] == 1
    page = session.execute(select(Page)).scalar_one()
    [row] = ctx.warehouse.query(f"SELECT url, datetime FROM {ctx.warehouse.table('page')}")
    assert row == {"url": page.url, "datetime": page.updated_at}

    assert reconcile_warehouse_job(ctx)["rows"] == 0


def test_warehouse_failure_nacks_lead_events(ctx):
    broken = dataclasses.replace(ctx, warehouse=BrokenWarehouse())
    msg = make_message(lead_event_payload())
    outcome = _committer(broken, "lead_event").process_batch([msg])
    assert msg.state == "nack"
    assert outcome.nacked == 1
