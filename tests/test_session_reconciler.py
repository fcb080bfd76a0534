import asyncio
import unittest
import uuid

from services.ai.chat.chat_errors import PersistenceConflict, StreamTransportError
from services.ai.chat.chat_models import (
    ChatSessionInfo,
    Message,
    MessageContext,
    PendingSessionState,
    ProfileUpdateIntent,
    QuotaStatus,
    done_frame,
    format_frame,
    now_iso,
)
from services.ai.chat.session_reconciler import SessionReconciler, merge_messages


class _FakePersistence:
    def __init__(self, sessions=("s1", "s2")):
        self.sessions = {sid: ChatSessionInfo(id=sid, session_name=sid) for sid in sessions}
        self.messages = {sid: [] for sid in sessions}
        self.context_updates = []
        self.fail_list = False
        self.fail_update = False

    async def list_sessions(self):
        return list(self.sessions.values())

    async def create_session(self, name):
        sid = uuid.uuid4().hex
        self.sessions[sid] = ChatSessionInfo(id=sid, session_name=name)
        self.messages[sid] = []
        return self.sessions[sid]

    async def rename_session(self, session_id, name):
        if session_id not in self.sessions:
            raise PersistenceConflict(session_id)
        self.sessions[session_id] = ChatSessionInfo(id=session_id, session_name=name)
        return self.sessions[session_id]

    async def delete_session(self, session_id):
        if session_id not in self.sessions:
            raise PersistenceConflict(session_id)
        del self.sessions[session_id]
        del self.messages[session_id]

    async def list_messages(self, session_id):
        if self.fail_list:
            raise PersistenceConflict("down")
        if session_id not in self.messages:
            raise PersistenceConflict(session_id)
        return list(self.messages[session_id])

    async def append_message(self, session_id, *, role, content, context=None):
        message = Message(
            id=uuid.uuid4().hex,
            role=role,
            content=content,
            timestamp=now_iso(),
            context=MessageContext.model_validate(context) if context else None,
        )
        self.messages[session_id].append(message)
        return message

    async def update_message_context(self, message_id, context):
        self.context_updates.append((message_id, dict(context)))
        if self.fail_update:
            raise PersistenceConflict("context update failed")
        for messages in self.messages.values():
            for idx, message in enumerate(messages):
                if message.id == message_id:
                    merged = {**(message.context.to_record() if message.context else {}), **context}
                    messages[idx] = message.model_copy(update={"context": MessageContext.model_validate(merged)})
                    return messages[idx]
        raise PersistenceConflict(message_id)


class _FakeTransport:
    """Behaves like the backend: streams content, persists both messages, ends with [DONE]."""

    def __init__(self, persistence, chunks=("Hej ", "där"), *, proposal=None, error=None, sentinel=True):
        self.persistence = persistence
        self.chunks = list(chunks)
        self.proposal = proposal
        self.error = error
        self.sentinel = sentinel
        self.on_chunk = None
        self.requests = []

    async def stream(self, request):
        self.requests.append(request)
        for idx, text in enumerate(self.chunks):
            yield format_frame({"content": text})
            if self.on_chunk is not None:
                await self.on_chunk(idx)
            if self.error is not None:
                raise self.error
        await self.persistence.append_message(
            request.session_id, role="user", content=request.message, context={"requestId": request.request_id}
        )
        context = {"requestId": request.request_id}
        if self.proposal is not None:
            extra = {
                "profileUpdates": dict(self.proposal.updates),
                "profileSummary": self.proposal.summary,
                "requiresConfirmation": True,
            }
            context.update(extra)
            yield format_frame({"content": "", **extra})
        await self.persistence.append_message(
            request.session_id, role="assistant", content="".join(self.chunks), context=context
        )
        if self.sentinel:
            yield done_frame()


class _FakeQuota:
    def __init__(self, allowed=True):
        self.status = QuotaStatus(allowed=allowed, used=0 if allowed else 5, limit=5, plan="free")
        self.calls = 0

    async def check(self):
        self.calls += 1
        return self.status


class _FakeProfile:
    def __init__(self, profile=None, error=None):
        self.profile = profile or {"risk_tolerance": "moderate", "monthly_investment_amount": 2000}
        self.error = error
        self.applied = []

    async def get_profile(self):
        return dict(self.profile)

    async def apply_updates(self, updates):
        self.applied.append(dict(updates))
        if self.error is not None:
            raise self.error
        self.profile.update(updates)
        return dict(self.profile)


CONSERVATIVE = ProfileUpdateIntent(
    updates={"risk_tolerance": "conservative"},
    summary="Vill du uppdatera din profil? Risktolerans: Konservativ",
)


def _reconciler(**overrides):
    persistence = overrides.pop("persistence", None) or _FakePersistence()
    transport = overrides.pop("transport", None) or _FakeTransport(persistence)
    rec = SessionReconciler(
        persistence=persistence,
        transport=transport,
        quota=overrides.pop("quota", _FakeQuota()),
        profile=overrides.pop("profile", _FakeProfile()),
        **overrides,
    )
    return rec, persistence, transport


class MergeMessagesTests(unittest.TestCase):
    def setUp(self):
        self.user = Message(id="u1", role="user", content="hej", context=MessageContext(request_id="r1"))
        self.assistant = Message(id="a1", role="assistant", content="svar", context=MessageContext(request_id="r1"))

    def test_committed_copy_replaces_drafts(self):
        drafts = [
            Message.draft(role="user", content="hej", request_id="r1"),
            Message.draft(role="assistant", content="sv", request_id="r1"),
        ]
        self.assertEqual(merge_messages([self.user, self.assistant], pending=drafts), [self.user, self.assistant])

    def test_merge_is_idempotent(self):
        ephemeral = [Message.ephemeral_proposal(CONSERVATIVE, request_id="r2")]
        pending = [
            Message.draft(role="user", content="sänk risken", request_id="r2"),
            Message.draft(role="assistant", content="", request_id="r2"),
        ]
        once = merge_messages([self.user, self.assistant], ephemeral, pending)
        twice = merge_messages(once, ephemeral, pending)
        self.assertEqual(once, twice)
        self.assertEqual(len(once), 5)

    def test_persisted_confirmation_hides_ephemeral(self):
        persisted_proposal = Message(
            id="a2",
            role="assistant",
            content="svar",
            context=MessageContext(request_id="r2", requires_confirmation=True, profile_updates={"risk_tolerance": "conservative"}),
        )
        ephemeral = [Message.ephemeral_proposal(CONSERVATIVE, request_id="r2")]
        merged = merge_messages([self.user, persisted_proposal], ephemeral)
        self.assertEqual([m.id for m in merged], ["u1", "a2"])
        self.assertEqual(sum(1 for m in merged if m.requires_confirmation), 1)


class SessionReconcilerSendTests(unittest.TestCase):
    def test_successful_send_commits_and_resyncs_usage(self):
        async def scenario():
            rec, persistence, transport = _reconciler()
            await rec.switch_session("s1")
            outcome = await rec.send("s1", "Hur går Volvo?")
            return rec, persistence, transport, outcome

        rec, persistence, transport, outcome = asyncio.run(scenario())

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(outcome.content, "Hej där")
        self.assertEqual([m.state for m in rec.messages], ["committed", "committed"])
        self.assertEqual([m.role for m in rec.messages], ["user", "assistant"])
        self.assertTrue(all(m.request_id == outcome.request_id for m in rec.messages))
        self.assertEqual(len(rec.pending), 0)
        self.assertEqual(rec.quota.calls, 2)
        self.assertFalse(rec.quota_exceeded)
        self.assertEqual(transport.requests[0].session_id, "s1")

    def test_blank_text_is_ignored(self):
        rec, _, transport = _reconciler()
        outcome = asyncio.run(rec.send("s1", "   "))
        self.assertEqual(outcome.status, "ignored")
        self.assertEqual(transport.requests, [])

    def test_quota_exhausted_blocks_before_drafts(self):
        async def scenario():
            rec, _, transport = _reconciler(quota=_FakeQuota(allowed=False))
            await rec.switch_session("s1")
            return rec, transport, await rec.send("s1", "hej")

        rec, transport, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, "quota_exceeded")
        self.assertEqual(outcome.notices[0].code, "quota_exceeded")
        self.assertEqual(rec.messages, [])
        self.assertEqual(transport.requests, [])
        self.assertTrue(rec.quota_exceeded)

    def test_transport_failure_rolls_back_drafts(self):
        async def scenario():
            persistence = _FakePersistence()
            transport = _FakeTransport(persistence, error=StreamTransportError("reset"))
            rec, _, _ = _reconciler(persistence=persistence, transport=transport)
            await rec.switch_session("s1")
            return rec, await rec.send("s1", "hej")

        rec, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, "error")
        self.assertEqual(outcome.notices[0].code, "stream_error")
        self.assertEqual(rec.messages, [])
        self.assertEqual(len(rec.pending), 0)

    def test_server_quota_error_frame(self):
        class _QuotaTransport:
            async def stream(self, request):
                yield format_frame({"error": "Gräns nådd", "code": "quota_exceeded"})

        async def scenario():
            rec, _, _ = _reconciler(transport=_QuotaTransport())
            await rec.switch_session("s1")
            return rec, await rec.send("s1", "hej")

        rec, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, "quota_exceeded")
        self.assertTrue(rec.quota_exceeded)
        self.assertEqual(rec.messages, [])

    def test_stream_without_sentinel_completes(self):
        async def scenario():
            persistence = _FakePersistence()
            rec, _, _ = _reconciler(persistence=persistence, transport=_FakeTransport(persistence, sentinel=False))
            await rec.switch_session("s1")
            return rec, await rec.send("s1", "hej")

        rec, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, "completed")
        self.assertEqual(len(rec.messages), 2)

    def test_updates_for_inactive_session_are_not_shown(self):
        async def scenario():
            rec, persistence, transport = _reconciler()

            async def switch(idx):
                if idx == 0:
                    await rec.switch_session("s2")

            transport.on_chunk = switch
            await rec.switch_session("s1")
            outcome = await rec.send("s1", "hej")
            shown_in_s2 = list(rec.messages)
            back = await rec.switch_session("s1")
            return outcome, shown_in_s2, back

        outcome, shown_in_s2, back = asyncio.run(scenario())
        self.assertEqual(outcome.status, "completed")
        self.assertEqual(shown_in_s2, [])
        self.assertEqual([m.role for m in back], ["user", "assistant"])

    def test_returning_mid_stream_resumes_live_updates(self):
        async def scenario():
            persistence = _FakePersistence()
            transport = _FakeTransport(persistence, chunks=("A", "B", "C"))
            rec, _, _ = _reconciler(persistence=persistence, transport=transport)
            snapshots = []

            async def navigate(idx):
                if idx == 0:
                    await rec.switch_session("s2")
                elif idx == 1:
                    await rec.switch_session("s1")
                snapshots.append([(m.role, m.state, m.content) for m in rec.messages])

            transport.on_chunk = navigate
            await rec.switch_session("s1")
            outcome = await rec.send("s1", "hej")
            return rec, snapshots, outcome

        rec, snapshots, outcome = asyncio.run(scenario())
        self.assertEqual(snapshots[0], [])
        self.assertEqual(snapshots[1], [("user", "draft", "hej"), ("assistant", "draft", "AB")])
        self.assertEqual(snapshots[2], [("user", "draft", "hej"), ("assistant", "draft", "ABC")])
        self.assertEqual(outcome.status, "completed")
        self.assertEqual([(m.role, m.state) for m in rec.messages], [("user", "committed"), ("assistant", "committed")])
        self.assertEqual(rec.messages[1].content, "ABC")
        self.assertEqual(len(rec.pending), 0)

    def test_stale_request_cannot_overwrite_newer_state(self):
        async def scenario():
            rec, _, transport = _reconciler()

            async def supersede(idx):
                if idx == 0:
                    rec.pending.put(
                        "s1",
                        PendingSessionState(
                            request_id="newer",
                            user_message=Message.draft(role="user", content="nyare", request_id="newer"),
                        ),
                    )

            transport.on_chunk = supersede
            await rec.switch_session("s1")
            await rec.send("s1", "hej")
            return rec

        rec = asyncio.run(scenario())
        self.assertTrue(rec.pending.is_current("s1", "newer"))
        self.assertIsNone(rec.pending.get("s1").ai_message)


class ProfileDetectionTests(unittest.TestCase):
    def test_local_detection_shows_ephemeral_proposal(self):
        async def scenario():
            rec, _, transport = _reconciler()
            snapshots = []

            async def snapshot(idx):
                snapshots.append([m.state for m in rec.messages])

            transport.on_chunk = snapshot
            await rec.switch_session("s1")
            outcome = await rec.send("s1", "Sänk risken")
            return rec, snapshots, outcome

        rec, snapshots, outcome = asyncio.run(scenario())
        self.assertIn("ephemeral", snapshots[0])
        self.assertEqual(outcome.proposal.updates, {"risk_tolerance": "conservative"})
        unresolved = [m for m in rec.messages if m.requires_confirmation]
        self.assertEqual(len(unresolved), 1)
        self.assertEqual(unresolved[0].state, "ephemeral")

    def test_persisted_proposal_replaces_ephemeral(self):
        async def scenario():
            persistence = _FakePersistence()
            transport = _FakeTransport(persistence, proposal=CONSERVATIVE)
            rec, _, _ = _reconciler(persistence=persistence, transport=transport)
            await rec.switch_session("s1")
            await rec.send("s1", "Sänk risken")
            return rec

        rec = asyncio.run(scenario())
        pending = [m for m in rec.messages if m.requires_confirmation]
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].state, "committed")
        self.assertFalse(rec.ephemeral.has_unresolved("s1"))

    def test_detection_suppressed_while_confirmation_pending(self):
        async def scenario():
            persistence = _FakePersistence()
            transport = _FakeTransport(persistence, proposal=CONSERVATIVE)
            rec, _, _ = _reconciler(persistence=persistence, transport=transport)
            await rec.switch_session("s1")
            await rec.send("s1", "Sänk risken")
            transport.proposal = None
            outcome = await rec.send("s1", "Höj risken")
            return rec, outcome

        rec, outcome = asyncio.run(scenario())
        self.assertIsNone(outcome.proposal)
        self.assertFalse(rec.ephemeral.has_unresolved("s1"))
        self.assertEqual(sum(1 for m in rec.messages if m.requires_confirmation), 1)

    def test_persisted_confirmation_suppresses_detection_for_inactive_session(self):
        async def scenario():
            persistence = _FakePersistence()
            persistence.messages["s1"].append(
                Message(
                    id="p1",
                    role="assistant",
                    content=CONSERVATIVE.summary,
                    context=MessageContext(
                        profile_updates=dict(CONSERVATIVE.updates),
                        profile_summary=CONSERVATIVE.summary,
                        requires_confirmation=True,
                    ),
                )
            )
            rec, _, _ = _reconciler(persistence=persistence)
            await rec.switch_session("s1")
            await rec.switch_session("s2")
            outcome = await rec.send("s1", "Höj risken")
            return rec, outcome

        rec, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, "completed")
        self.assertIsNone(outcome.proposal)
        self.assertFalse(rec.ephemeral.has_unresolved("s1"))

    def test_switching_away_drops_ephemeral_proposals(self):
        async def scenario():
            rec, _, _ = _reconciler()
            await rec.switch_session("s1")
            await rec.send("s1", "Sänk risken")
            await rec.switch_session("s2")
            return rec

        rec = asyncio.run(scenario())
        self.assertFalse(rec.ephemeral.has_unresolved("s1"))


class ConfirmationTests(unittest.TestCase):
    def _with_persisted_proposal(self, **overrides):
        persistence = overrides.pop("persistence", None) or _FakePersistence()
        transport = _FakeTransport(persistence, proposal=CONSERVATIVE)
        rec, _, _ = _reconciler(persistence=persistence, transport=transport, **overrides)
        return rec, persistence

    def test_accept_applies_updates_exactly_once(self):
        async def scenario():
            profile = _FakeProfile()
            rec, persistence = self._with_persisted_proposal(profile=profile)
            await rec.switch_session("s1")
            await rec.send("s1", "Sänk risken")
            target = next(m for m in rec.messages if m.requires_confirmation)
            first = await rec.accept_confirmation(target.id)
            second = await rec.accept_confirmation(target.id)
            return rec, persistence, profile, first, second

        rec, persistence, profile, first, second = asyncio.run(scenario())
        self.assertTrue(first)
        self.assertFalse(second)
        self.assertEqual(profile.applied, [{"risk_tolerance": "conservative"}])
        self.assertEqual(profile.profile["risk_tolerance"], "conservative")
        self.assertFalse(any(m.requires_confirmation for m in rec.messages))
        self.assertEqual(persistence.context_updates[0][1]["requiresConfirmation"], False)
        self.assertTrue(rec.messages[-1].content.startswith("Din profil har uppdaterats."))
        stored = persistence.messages["s1"]
        self.assertFalse(any(m.requires_confirmation for m in stored))

    def test_failed_context_write_reverts(self):
        async def scenario():
            persistence = _FakePersistence()
            rec, _ = self._with_persisted_proposal(persistence=persistence)
            await rec.switch_session("s1")
            await rec.send("s1", "Sänk risken")
            persistence.fail_update = True
            target = next(m for m in rec.messages if m.requires_confirmation)
            return rec, await rec.accept_confirmation(target.id)

        rec, accepted = asyncio.run(scenario())
        self.assertFalse(accepted)
        self.assertEqual(sum(1 for m in rec.messages if m.requires_confirmation), 1)
        self.assertEqual(rec.drain_notices()[-1].code, "persistence_conflict")

    def test_profile_failure_leaves_proposal(self):
        async def scenario():
            profile = _FakeProfile(error=PersistenceConflict("nope"))
            rec, persistence = self._with_persisted_proposal(profile=profile)
            await rec.switch_session("s1")
            await rec.send("s1", "Sänk risken")
            target = next(m for m in rec.messages if m.requires_confirmation)
            return rec, persistence, await rec.accept_confirmation(target.id)

        rec, persistence, accepted = asyncio.run(scenario())
        self.assertFalse(accepted)
        self.assertEqual(persistence.context_updates, [])
        self.assertEqual(sum(1 for m in rec.messages if m.requires_confirmation), 1)

    def test_dismiss_ephemeral_proposal(self):
        async def scenario():
            profile = _FakeProfile()
            rec, persistence, _ = _reconciler(profile=profile)
            await rec.switch_session("s1")
            await rec.send("s1", "Sänk risken")
            target = next(m for m in rec.messages if m.requires_confirmation)
            return rec, persistence, profile, await rec.dismiss_confirmation(target.id)

        rec, persistence, profile, dismissed = asyncio.run(scenario())
        self.assertTrue(dismissed)
        self.assertEqual(profile.applied, [])
        self.assertEqual(persistence.context_updates, [])
        self.assertFalse(rec.ephemeral.has_unresolved("s1"))
        self.assertFalse(any(m.requires_confirmation for m in rec.messages))


class SessionManagementTests(unittest.TestCase):
    def test_load_failure_drops_drafts_and_notifies(self):
        async def scenario():
            rec, persistence, _ = _reconciler()
            await rec.switch_session("s1")
            rec.messages.append(Message.draft(role="user", content="hej", request_id="r1"))
            persistence.fail_list = True
            return rec, await rec.load_messages("s1")

        rec, shown = asyncio.run(scenario())
        self.assertEqual(shown, [])
        self.assertEqual(rec.drain_notices()[0].code, "persistence_conflict")
        self.assertEqual(rec.drain_notices(), [])

    def test_create_session_names_from_first_message(self):
        async def scenario():
            rec, _, _ = _reconciler()
            info = await rec.create_session(first_message="  Hur ser   marknaden ut " + "x" * 80)
            return rec, info

        rec, info = asyncio.run(scenario())
        self.assertEqual(len(info.session_name), 50)
        self.assertTrue(info.session_name.startswith("Hur ser marknaden ut"))
        self.assertEqual(rec.active_session_id, info.id)

    def test_delete_session_evicts_state(self):
        async def scenario():
            rec, _, _ = _reconciler()
            await rec.switch_session("s1")
            rec.pending.put(
                "s1",
                PendingSessionState(
                    request_id="r1",
                    user_message=Message.draft(role="user", content="hej", request_id="r1"),
                ),
            )
            rec.ephemeral.add("s1", Message.ephemeral_proposal(CONSERVATIVE, request_id="r1"))
            deleted = await rec.delete_session("s1")
            missing = await rec.delete_session("s1")
            return rec, deleted, missing

        rec, deleted, missing = asyncio.run(scenario())
        self.assertTrue(deleted)
        self.assertFalse(missing)
        self.assertNotIn("s1", rec.pending)
        self.assertFalse(rec.ephemeral.has_unresolved("s1"))
        self.assertIsNone(rec.active_session_id)
        self.assertEqual(rec.messages, [])

    def test_rename_rejects_blank(self):
        rec, _, _ = _reconciler()
        self.assertIsNone(asyncio.run(rec.rename_session("s1", "  ")))
        self.assertEqual(asyncio.run(rec.rename_session("s1", "Volvo")).session_name, "Volvo")


if __name__ == "__main__":
    unittest.main()
