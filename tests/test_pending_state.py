import unittest

from services.ai.chat.chat_models import Message, PendingSessionState, ProfileUpdateIntent
from services.ai.chat.pending_state import EphemeralMessageStore, PendingStateCache


def _pending(request_id: str) -> PendingSessionState:
    return PendingSessionState(
        request_id=request_id,
        user_message=Message.draft(role="user", content="hej", request_id=request_id),
    )


class PendingStateCacheTests(unittest.TestCase):
    def test_stale_write_rejected(self):
        cache = PendingStateCache()
        cache.put("s1", _pending("old"))
        cache.put("s1", _pending("new"))

        late = Message.draft(role="assistant", content="sent svar", request_id="old")
        self.assertFalse(cache.update("s1", "old", ai_message=late))
        self.assertIsNone(cache.get("s1").ai_message)

        fresh = Message.draft(role="assistant", content="svar", request_id="new")
        self.assertTrue(cache.update("s1", "new", ai_message=fresh))
        self.assertEqual(cache.get("s1").ai_message.content, "svar")

    def test_update_on_unknown_session(self):
        self.assertFalse(PendingStateCache().update("nope", "r", ai_message=None))

    def test_lru_bound(self):
        cache = PendingStateCache(max_sessions=2)
        cache.put("a", _pending("1"))
        cache.put("b", _pending("2"))
        cache.get("a")
        cache.put("c", _pending("3"))
        self.assertEqual(len(cache), 2)
        self.assertIn("a", cache)
        self.assertNotIn("b", cache)

    def test_discard_only_current_request(self):
        cache = PendingStateCache()
        cache.put("s1", _pending("r2"))
        self.assertFalse(cache.discard("s1", "r1"))
        self.assertTrue(cache.is_current("s1", "r2"))
        self.assertTrue(cache.discard("s1", "r2"))
        self.assertNotIn("s1", cache)

    def test_pending_messages_order(self):
        state = _pending("r")
        ai = Message.draft(role="assistant", content="", request_id="r")
        state = state.model_copy(update={"ai_message": ai})
        self.assertEqual([m.role for m in state.messages()], ["user", "assistant"])


class EphemeralMessageStoreTests(unittest.TestCase):
    def setUp(self):
        proposal = ProfileUpdateIntent(updates={"risk_tolerance": "moderate"}, summary="Vill du uppdatera din profil?")
        self.message = Message.ephemeral_proposal(proposal, request_id="r1")
        self.store = EphemeralMessageStore()

    def test_add_is_idempotent(self):
        self.store.add("s1", self.message)
        self.store.add("s1", self.message)
        self.assertEqual(len(self.store.unresolved("s1")), 1)
        self.assertTrue(self.store.has_unresolved("s1"))
        self.assertFalse(self.store.has_unresolved("s2"))

    def test_resolve_and_find(self):
        self.store.add("s1", self.message)
        self.assertEqual(self.store.find(self.message.id), "s1")
        self.assertEqual(self.store.resolve("s1", self.message.id).id, self.message.id)
        self.assertIsNone(self.store.find(self.message.id))
        self.assertIsNone(self.store.resolve("s1", self.message.id))

    def test_clear(self):
        self.store.add("s1", self.message)
        self.store.clear("s1")
        self.assertEqual(self.store.sessions(), [])


if __name__ == "__main__":
    unittest.main()
