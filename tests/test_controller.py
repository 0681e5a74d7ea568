from __future__ import annotations

import pytest

from warden_bot.adapters.ledger import LedgerOperation, LedgerResult
from warden_bot.enforcement.blacklist import BlacklistStore
from warden_bot.models import (
    Authority,
    DecisionKind,
    MemberRemovedEvent,
    MembershipRequestEvent,
    RemovalKind,
    RequestDecision,
    RequestKind,
)
from tests.factories import (
    FakeLedger,
    FakeSession,
    HangingSession,
    make_controller,
    make_message,
    network_error,
    open_storage,
)


async def ban(storage, user_id: str) -> None:
    await storage.link_account(user_id)
    await BlacklistStore(storage, storage).ban(user_id, user_id, "op")


@pytest.mark.asyncio
async def test_banned_speaker_is_kicked_and_short_circuits() -> None:
    async with open_storage() as storage:
        await ban(storage, "10")
        session = FakeSession()
        controller = make_controller(storage, probability=1.0)

        decision = await controller.handle_message(make_message("badword"), session)

        assert decision.kind == DecisionKind.KICKED
        assert session.kicked == [("100", "10")]
        assert session.deleted == []
        assert decision.replies and decision.replies[0].text


@pytest.mark.asyncio
async def test_failed_kick_falls_through_to_keyword_check() -> None:
    async with open_storage() as storage:
        await ban(storage, "10")
        session = FakeSession(fail_kicks=frozenset({"10"}))
        controller = make_controller(storage)

        decision = await controller.handle_message(make_message("that badword again"), session)

        assert decision.kind == DecisionKind.WARNED
        assert session.deleted == [("100", "1")]


@pytest.mark.asyncio
async def test_banned_speaker_without_auto_kick_gets_no_reward() -> None:
    async with open_storage() as storage:
        await ban(storage, "10")
        session = FakeSession()
        controller = make_controller(storage, probability=1.0, auto_kick_on_speak=False)

        decision = await controller.handle_message(make_message("hi"), session)

        assert decision.kind == DecisionKind.NONE
        assert session.kicked == []


@pytest.mark.asyncio
async def test_violations_warn_then_mute() -> None:
    async with open_storage() as storage:
        session = FakeSession()
        controller = make_controller(storage, mute_threshold=3, mute_duration=120)

        kinds = []
        for index in range(3):
            decision = await controller.handle_message(make_message("badword", message_id=str(index)), session)
            kinds.append(decision.kind)

        assert kinds == [DecisionKind.WARNED, DecisionKind.WARNED, DecisionKind.MUTED]
        assert session.muted == [("100", "10", 120)]
        assert len(session.deleted) == 3
        assert decision.outcome is not None and decision.outcome.new_count == 3
        assert decision.replies and "muted" in decision.replies[0].text


@pytest.mark.asyncio
async def test_warning_text_carries_count_and_threshold() -> None:
    async with open_storage() as storage:
        controller = make_controller(storage, mute_threshold=3)
        session = FakeSession()

        await controller.handle_message(make_message("badword"), session)
        decision = await controller.handle_message(make_message("BADWORD"), session)

        text = await controller.finalize_outbound(decision.replies[0])
        assert decision.outcome is not None and decision.outcome.new_count == 2
        assert "2/3" in text


@pytest.mark.asyncio
async def test_mute_failure_is_silent() -> None:
    async with open_storage() as storage:
        controller = make_controller(storage, mute_threshold=1)
        session = FakeSession(fail_all=True)

        decision = await controller.handle_message(make_message("badword"), session)

        assert decision.kind == DecisionKind.MUTED
        assert decision.replies == []


@pytest.mark.asyncio
async def test_hanging_mute_times_out_without_aborting_the_handler() -> None:
    async with open_storage() as storage:
        controller = make_controller(storage, mute_threshold=1, call_timeout_seconds=0.05)
        session = HangingSession()

        decision = await controller.handle_message(make_message("badword"), session)

        assert decision.kind == DecisionKind.MUTED
        assert decision.replies == []
        assert session.deleted == [("100", "1")]
        assert session.muted == []


@pytest.mark.asyncio
async def test_violation_skips_reward_path() -> None:
    async with open_storage() as storage:
        ledger = FakeLedger()
        controller = make_controller(storage, ledger, probability=1.0)

        decision = await controller.handle_message(make_message("badword"), FakeSession())

        assert decision.kind == DecisionKind.WARNED
        assert all(reply.pending_reward is None for reply in decision.replies)
        assert ledger.calls == []


@pytest.mark.asyncio
async def test_reward_credited_once_and_score_in_reply() -> None:
    async with open_storage() as storage:
        ledger = FakeLedger(LedgerResult(code=0, score=57))
        controller = make_controller(storage, ledger, probability=1.0)

        decision = await controller.handle_message(make_message("good morning"), FakeSession())
        assert decision.kind == DecisionKind.REWARD_PENDING
        assert ledger.calls == []
        reply = decision.replies[0]
        assert reply.text == ""

        text = await controller.finalize_outbound(reply)
        again = await controller.finalize_outbound(reply)

        assert len(ledger.calls) == 1
        assert ledger.calls[0]["operation"] == LedgerOperation.RANDOM_ADD
        assert ledger.calls[0]["amount"] == 1
        assert ledger.calls[0]["user_id"] == "10"
        assert "57" in text
        assert again is None


@pytest.mark.asyncio
async def test_probability_zero_never_rewards() -> None:
    async with open_storage() as storage:
        controller = make_controller(storage, probability=0.0)

        decision = await controller.handle_message(make_message("good morning"), FakeSession())

        assert decision.kind == DecisionKind.NONE
        assert decision.replies == []


@pytest.mark.asyncio
async def test_duplicate_reward_sends_nothing() -> None:
    async with open_storage() as storage:
        ledger = FakeLedger(LedgerResult(code=40001, message="duplicate"))
        controller = make_controller(storage, ledger, probability=1.0)

        decision = await controller.handle_message(make_message("hi"), FakeSession())

        assert await controller.finalize_outbound(decision.replies[0]) is None


@pytest.mark.asyncio
async def test_ledger_network_failure_sends_nothing() -> None:
    async with open_storage() as storage:
        ledger = FakeLedger(error=network_error())
        controller = make_controller(storage, ledger, probability=1.0)

        decision = await controller.handle_message(make_message("hi"), FakeSession())

        assert await controller.finalize_outbound(decision.replies[0]) is None
        assert len(ledger.calls) == 1


@pytest.mark.asyncio
async def test_ban_and_unban_commands_surface_results() -> None:
    async with open_storage() as storage:
        controller = make_controller(storage)
        await storage.link_account("20")

        banned = await controller.ban_command("20", "Mallory", "op")
        unresolved = await controller.ban_command("404", "", "op")
        unbanned = await controller.unban_command("20", "Mallory")

        assert "Mallory" in banned and "blacklist" in banned
        assert "404" in unresolved and "no linked account" in unresolved
        assert "removed" in unbanned
        assert await storage.get_authority("20") == Authority.MEMBER


@pytest.mark.asyncio
async def test_join_requests_from_blacklisted_users_are_rejected() -> None:
    async with open_storage() as storage:
        await ban(storage, "30")
        await storage.link_account("31")
        controller = make_controller(storage)
        session = FakeSession()

        decisions = []
        for kind, user_id in ((RequestKind.JOIN, "30"), (RequestKind.INVITE, "30"), (RequestKind.JOIN, "31")):
            event = MembershipRequestEvent(kind=kind, session_id="bot-1", guild_id="100", user_id=user_id)
            decisions.append(await controller.handle_membership_request(event, session))

        assert decisions == [RequestDecision.REJECTED, RequestDecision.REJECTED, RequestDecision.IGNORED]
        assert [request.user_id for request in session.rejected] == ["30", "30"]


@pytest.mark.asyncio
async def test_failed_decline_is_not_reported_as_rejected() -> None:
    async with open_storage() as storage:
        await ban(storage, "30")
        controller = make_controller(storage)
        event = MembershipRequestEvent(kind=RequestKind.JOIN, session_id="bot-1", guild_id="100", user_id="30")

        decision = await controller.handle_membership_request(event, FakeSession(fail_all=True))

        assert decision == RequestDecision.REJECT_FAILED


@pytest.mark.asyncio
async def test_admin_kick_becomes_ban_but_leaving_does_not() -> None:
    async with open_storage() as storage:
        await storage.link_account("40")
        await storage.link_account("41")
        controller = make_controller(storage)
        store = BlacklistStore(storage, storage)

        kicked = await controller.handle_member_removed(
            MemberRemovedEvent(
                kind=RemovalKind.KICKED,
                session_id="bot-1",
                guild_id="100",
                user_id="40",
                display_name="Trent",
                operator_id="admin-1",
            )
        )
        left = await controller.handle_member_removed(
            MemberRemovedEvent(kind=RemovalKind.LEFT, session_id="bot-1", guild_id="100", user_id="41")
        )

        assert kicked is True and left is False
        assert await store.is_banned("40")
        assert not await store.is_banned("41")
        entries, _ = await store.list()
        assert entries[0].operator_id == "admin-1"
