"""Unit tests for claim resolution and the offer expiry sweep."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.models import (
    Booking,
    OfferStatus,
    OfferTrigger,
    WaitlistEntry,
    WaitlistLifecycleEvent,
    WaitlistOffer,
    WaitlistPolicy,
    WaitlistStatus,
)
from app.schemas.waitlist import ClaimResultStatus, OfferOutcome
from app.core.observability import REGISTRY
from app.services.claim_service import SLOT_UNAVAILABLE_ERROR, ClaimService
from app.services.notification_service import SmsService
from app.services.offer_service import OfferService
from app.services.waitlist_service import WaitlistService
from conftest import FakeTwilioClient, add_booking, add_waitlist_entry, at, extract_token, future_day, reload


async def _send_offer(test_session, salon, offer_service, fake_twilio, day, hour=10, **entry_kwargs):
    entry_id = await add_waitlist_entry(test_session, salon, day, **entry_kwargs)
    result = await WaitlistService(test_session, offer_service=offer_service).notify_entry(
        salon.salon_id, entry_id, slot_start=at(day, hour), employee_id=salon.alice_id
    )
    assert result.outcome == OfferOutcome.SENT
    return entry_id, result.offer_id, extract_token(fake_twilio.sent[-1]["body"])


async def _booking_count(test_session) -> int:
    return (await test_session.execute(select(func.count()).select_from(Booking))).scalar_one()


@pytest.mark.asyncio
async def test_accept_books_the_slot_exactly_once(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    entry_id, offer_id, token = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    claims = ClaimService(test_session, offer_service=offer_service)

    result = await claims.resolve_claim(token=token, action="accept", response_channel="sms")

    assert result.ok is True
    assert result.result_status == ClaimResultStatus.ACCEPTED
    booking = (await test_session.execute(select(Booking))).scalar_one()
    assert booking.waitlist_entry_id == entry_id
    assert (booking.start_time, booking.end_time) == (at(day, 10), at(day, 10, 30))
    assert booking.customer_name == "Waiting Customer"

    offer = await reload(test_session, WaitlistOffer, offer_id)
    assert offer.status == OfferStatus.ACCEPTED.value
    assert offer.booking_id == booking.id
    assert offer.response_channel == "sms"
    assert (await reload(test_session, WaitlistEntry, entry_id)).status == WaitlistStatus.ACCEPTED.value

    replay = await claims.resolve_claim(token=token, action="accept")
    assert replay.ok is False
    assert replay.result_status == ClaimResultStatus.INVALID
    assert await _booking_count(test_session) == 1


@pytest.mark.asyncio
async def test_decline_finalizes_entry(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    entry_id, offer_id, token = await _send_offer(test_session, salon, offer_service, fake_twilio, day)

    result = await ClaimService(test_session, offer_service=offer_service).resolve_claim(token=token, action="decline")

    assert result.ok is True
    assert result.result_status == ClaimResultStatus.DECLINED
    assert (await reload(test_session, WaitlistOffer, offer_id)).status == OfferStatus.DECLINED.value
    assert (await reload(test_session, WaitlistEntry, entry_id)).status == WaitlistStatus.DECLINED.value
    assert await _booking_count(test_session) == 0


@pytest.mark.asyncio
async def test_decline_requeues_when_policy_says_so(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    test_session.add(WaitlistPolicy(salon_id=salon.salon_id, requeue_on_decline=True))
    await test_session.commit()
    entry_id, _, token = await _send_offer(test_session, salon, offer_service, fake_twilio, day)

    await ClaimService(test_session, offer_service=offer_service).resolve_claim(token=token, action="decline")

    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert entry.status == WaitlistStatus.WAITING.value
    assert entry.notified_at is None


@pytest.mark.asyncio
async def test_unknown_token_or_action_is_invalid(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    entry_id, offer_id, token = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    claims = ClaimService(test_session, offer_service=offer_service)

    assert (await claims.resolve_claim(token="0" * 48, action="accept")).result_status == ClaimResultStatus.INVALID
    assert (await claims.resolve_claim(token=token, action="maybe")).result_status == ClaimResultStatus.INVALID
    assert (await claims.resolve_claim(token="", action="accept")).result_status == ClaimResultStatus.INVALID
    assert (await reload(test_session, WaitlistOffer, offer_id)).status == OfferStatus.PENDING.value


@pytest.mark.asyncio
async def test_expired_link_changes_nothing_until_sweep(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    entry_id, offer_id, token = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    offer = await reload(test_session, WaitlistOffer, offer_id)
    late = offer.token_expires_at + timedelta(seconds=1)
    claims = ClaimService(test_session, offer_service=offer_service)

    result = await claims.resolve_claim(token=token, action="accept", now=late)

    assert result.ok is False
    assert result.result_status == ClaimResultStatus.EXPIRED
    assert (await reload(test_session, WaitlistOffer, offer_id)).status == OfferStatus.PENDING.value
    assert (await reload(test_session, WaitlistEntry, entry_id)).status == WaitlistStatus.NOTIFIED.value

    expired, chained = await claims.expire_offers(now=late)

    assert (expired, chained) == (1, 0)
    assert (await reload(test_session, WaitlistOffer, offer_id)).status == OfferStatus.EXPIRED.value
    assert (await reload(test_session, WaitlistEntry, entry_id)).status == WaitlistStatus.EXPIRED.value
    timeouts = (
        await test_session.execute(
            select(WaitlistLifecycleEvent).where(WaitlistLifecycleEvent.reason == "offer_timeout")
        )
    ).scalars().all()
    assert len(timeouts) == 1


@pytest.mark.asyncio
async def test_expiry_chains_offer_to_next_entry(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    first_id, offer_id, _ = await _send_offer(
        test_session, salon, offer_service, fake_twilio, day, customer_name="First"
    )
    second_id = await add_waitlist_entry(test_session, salon, day, customer_name="Second")
    late = (await reload(test_session, WaitlistOffer, offer_id)).token_expires_at + timedelta(seconds=1)

    expired, chained = await ClaimService(test_session, offer_service=offer_service).expire_offers(now=late)

    assert (expired, chained) == (1, 1)
    assert (await reload(test_session, WaitlistEntry, first_id)).status == WaitlistStatus.EXPIRED.value
    assert (await reload(test_session, WaitlistEntry, second_id)).status == WaitlistStatus.NOTIFIED.value
    follow_up = (
        await test_session.execute(
            select(WaitlistOffer).where(WaitlistOffer.status == OfferStatus.PENDING.value)
        )
    ).scalar_one()
    assert follow_up.waitlist_entry_id == second_id
    assert follow_up.trigger == OfferTrigger.LIFECYCLE_CHAIN.value


@pytest.mark.asyncio
async def test_requeued_entry_is_not_chained_to_same_slot(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    test_session.add(WaitlistPolicy(salon_id=salon.salon_id, requeue_on_expiry=True, cooldown_minutes=0))
    await test_session.commit()
    entry_id, offer_id, _ = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    late = (await reload(test_session, WaitlistOffer, offer_id)).token_expires_at + timedelta(seconds=1)

    expired, chained = await ClaimService(test_session, offer_service=offer_service).expire_offers(now=late)

    assert (expired, chained) == (1, 0)
    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert entry.status == WaitlistStatus.WAITING.value
    assert entry.decline_count == 1
    assert entry.cooldown_until is None


@pytest.mark.asyncio
async def test_accept_of_taken_slot_returns_entry_to_queue(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    entry_id, offer_id, token = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    await add_booking(test_session, salon, salon.alice_id, at(day, 10), customer_name="Walk-in")

    result = await ClaimService(test_session, offer_service=offer_service).resolve_claim(token=token, action="accept")

    assert result.ok is False
    assert result.result_status == ClaimResultStatus.SLOT_UNAVAILABLE
    offer = await reload(test_session, WaitlistOffer, offer_id)
    assert offer.status == OfferStatus.EXPIRED.value
    assert offer.last_error == SLOT_UNAVAILABLE_ERROR
    assert (await reload(test_session, WaitlistEntry, entry_id)).status == WaitlistStatus.WAITING.value
    assert await _booking_count(test_session) == 1


@pytest.mark.asyncio
async def test_failed_delivery_entries_are_released_after_deadline(test_session, salon, email_service):
    day = future_day()
    sms = SmsService(test_session, client=FakeTwilioClient(fail=True))
    offer_service = OfferService(test_session, sms_service=sms, email_service=email_service)
    entry_id = await add_waitlist_entry(test_session, salon, day)
    result = await WaitlistService(test_session, offer_service=offer_service).notify_entry(
        salon.salon_id, entry_id, slot_start=at(day, 10), employee_id=salon.alice_id
    )
    assert result.outcome == OfferOutcome.NOTIFICATION_FAILED
    deadline = result.entry.expires_at
    claims = ClaimService(test_session, offer_service=offer_service)

    assert await claims.release_stale_entries(now=deadline - timedelta(minutes=1)) == 0
    assert await claims.release_stale_entries(now=deadline) == 1
    assert (await reload(test_session, WaitlistEntry, entry_id)).status == WaitlistStatus.EXPIRED.value


def _sweep_errors(sweep: str) -> float:
    return REGISTRY.get_sample_value("waitlist_sweep_errors_total", {"sweep": sweep}) or 0.0


@pytest.mark.asyncio
async def test_decline_after_accept_is_invalid(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    entry_id, offer_id, token = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    claims = ClaimService(test_session, offer_service=offer_service)

    assert (await claims.resolve_claim(token=token, action="accept")).ok is True
    result = await claims.resolve_claim(token=token, action="decline")

    assert result.ok is False
    assert result.result_status == ClaimResultStatus.INVALID
    assert (await reload(test_session, WaitlistOffer, offer_id)).status == OfferStatus.ACCEPTED.value
    assert (await reload(test_session, WaitlistEntry, entry_id)).status == WaitlistStatus.ACCEPTED.value
    assert await _booking_count(test_session) == 1


@pytest.mark.asyncio
async def test_accept_after_decline_is_invalid(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    entry_id, offer_id, token = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    claims = ClaimService(test_session, offer_service=offer_service)

    assert (await claims.resolve_claim(token=token, action="decline")).ok is True
    result = await claims.resolve_claim(token=token, action="accept")

    assert result.ok is False
    assert result.result_status == ClaimResultStatus.INVALID
    assert (await reload(test_session, WaitlistOffer, offer_id)).status == OfferStatus.DECLINED.value
    assert (await reload(test_session, WaitlistEntry, entry_id)).status == WaitlistStatus.DECLINED.value
    assert await _booking_count(test_session) == 0


@pytest.mark.asyncio
async def test_timed_out_entry_cools_down_then_rejoins_queue(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    test_session.add(WaitlistPolicy(salon_id=salon.salon_id, requeue_on_expiry=True, cooldown_minutes=60))
    await test_session.commit()
    entry_id, offer_id, _ = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    late = (await reload(test_session, WaitlistOffer, offer_id)).token_expires_at + timedelta(seconds=1)
    claims = ClaimService(test_session, offer_service=offer_service)

    assert await claims.expire_offers(now=late) == (1, 0)

    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert entry.status == WaitlistStatus.COOLDOWN.value
    assert entry.decline_count == 1
    assert entry.cooldown_until == late + timedelta(minutes=60)
    assert entry.notified_at is None

    assert await claims.reactivate_cooldown_entries(now=late + timedelta(minutes=59)) == 0
    assert await claims.reactivate_cooldown_entries(now=late + timedelta(minutes=60)) == 1

    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert entry.status == WaitlistStatus.WAITING.value
    assert entry.cooldown_until is None
    reactivation = (
        await test_session.execute(
            select(WaitlistLifecycleEvent).where(
                WaitlistLifecycleEvent.waitlist_entry_id == entry_id,
                WaitlistLifecycleEvent.reason == "cooldown_reactivated",
            )
        )
    ).scalar_one()
    assert (reactivation.from_status, reactivation.to_status) == (
        WaitlistStatus.COOLDOWN.value,
        WaitlistStatus.WAITING.value,
    )


@pytest.mark.asyncio
async def test_repeated_timeouts_apply_passive_cooldown(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    test_session.add(
        WaitlistPolicy(
            salon_id=salon.salon_id,
            requeue_on_expiry=True,
            cooldown_minutes=0,
            passive_decline_threshold=2,
            passive_cooldown_minutes=1440,
        )
    )
    await test_session.commit()
    entry_id, first_offer_id, _ = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    claims = ClaimService(test_session, offer_service=offer_service)

    first_late = (await reload(test_session, WaitlistOffer, first_offer_id)).token_expires_at + timedelta(seconds=1)
    assert await claims.expire_offers(now=first_late) == (1, 0)
    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert (entry.status, entry.decline_count) == (WaitlistStatus.WAITING.value, 1)

    second = await WaitlistService(test_session, offer_service=offer_service).notify_entry(
        salon.salon_id, entry_id, slot_start=at(day, 11), employee_id=salon.alice_id
    )
    assert second.outcome == OfferOutcome.SENT
    second_late = (await reload(test_session, WaitlistOffer, second.offer_id)).token_expires_at + timedelta(seconds=1)
    assert await claims.expire_offers(now=second_late) == (1, 0)

    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert entry.status == WaitlistStatus.COOLDOWN.value
    assert entry.decline_count == 2
    assert entry.cooldown_until == second_late + timedelta(minutes=1440)
    timeout = (
        await test_session.execute(
            select(WaitlistLifecycleEvent)
            .where(
                WaitlistLifecycleEvent.waitlist_entry_id == entry_id,
                WaitlistLifecycleEvent.reason == "offer_timeout",
                WaitlistLifecycleEvent.to_status == WaitlistStatus.COOLDOWN.value,
            )
        )
    ).scalar_one()
    assert timeout.event_metadata["passive_applied"] is True
    assert timeout.event_metadata["cooldown_minutes"] == 1440


@pytest.mark.asyncio
async def test_cooling_down_entry_can_be_cancelled(test_session, salon, offer_service, fake_twilio):
    day = future_day()
    test_session.add(WaitlistPolicy(salon_id=salon.salon_id, requeue_on_expiry=True))
    await test_session.commit()
    entry_id, offer_id, _ = await _send_offer(test_session, salon, offer_service, fake_twilio, day)
    late = (await reload(test_session, WaitlistOffer, offer_id)).token_expires_at + timedelta(seconds=1)
    claims = ClaimService(test_session, offer_service=offer_service)
    await claims.expire_offers(now=late)

    entry = await WaitlistService(test_session, offer_service=offer_service).cancel_entry(salon.salon_id, entry_id)

    assert entry.status == WaitlistStatus.CANCELLED.value
    assert entry.cooldown_until is None
    assert await claims.reactivate_cooldown_entries(now=late + timedelta(days=30)) == 0


@pytest.mark.asyncio
async def test_expiry_sweep_skips_failing_offer(test_session, salon, offer_service, fake_twilio, monkeypatch):
    day = future_day()
    broken_id, broken_offer_id, _ = await _send_offer(
        test_session, salon, offer_service, fake_twilio, day, hour=10, customer_name="Broken"
    )
    healthy_id, healthy_offer_id, _ = await _send_offer(
        test_session, salon, offer_service, fake_twilio, day, hour=11, customer_name="Healthy"
    )
    late = (await reload(test_session, WaitlistOffer, healthy_offer_id)).token_expires_at + timedelta(seconds=1)
    original = ClaimService._expire_one

    async def expire_one(self, snap, now):
        if snap["entry_id"] == broken_id:
            raise RuntimeError("row locked")
        return await original(self, snap, now)

    monkeypatch.setattr(ClaimService, "_expire_one", expire_one)
    errors_before = _sweep_errors("offer_expiry")

    expired, _ = await ClaimService(test_session, offer_service=offer_service).expire_offers(now=late)

    assert expired == 1
    assert _sweep_errors("offer_expiry") == errors_before + 1
    assert (await reload(test_session, WaitlistOffer, broken_offer_id)).status == OfferStatus.PENDING.value
    assert (await reload(test_session, WaitlistOffer, healthy_offer_id)).status == OfferStatus.EXPIRED.value
    assert (await reload(test_session, WaitlistEntry, healthy_id)).status == WaitlistStatus.EXPIRED.value
