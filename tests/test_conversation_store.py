import asyncio
import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  (registers tables)
from database import Base
from models.conversation import ChatMessage
from services.ai.chat.chat_errors import PersistenceConflict
from services.ai.chat.conversation_store import AsyncConversationStore, ConversationStore, to_message


def _session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False)


class ConversationStoreTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = _session_factory()
        self.db = factory()
        self.store = ConversationStore(self.db, "u1")

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_ensure_session_creates_and_names(self):
        row = self.store.ensure_session("s1", first_message="Hur ser  marknaden ut?")
        self.assertEqual(row.session_name, "Hur ser marknaden ut?")
        self.assertIs(self.store.ensure_session("s1"), row)

    def test_ownership_is_enforced(self):
        self.store.create_session("Min chatt", session_id="s1")
        other = ConversationStore(self.db, "u2")
        with self.assertRaises(PersistenceConflict):
            other.ensure_session("s1")
        with self.assertRaises(PersistenceConflict):
            other.list_messages("s1")
        with self.assertRaises(PersistenceConflict):
            other.add_message("s1", role="user", content="hej")
        with self.assertRaises(PersistenceConflict):
            other.delete_session("s1")
        self.assertEqual(other.list_sessions(), [])

    def test_messages_keep_insert_order_and_context(self):
        self.store.create_session(session_id="s1")
        self.store.add_message("s1", role="user", content="fråga", context={"requestId": "r1"})
        self.store.add_message(
            "s1",
            role="assistant",
            content="svar",
            context={"requestId": "r1", "requiresConfirmation": True, "profileUpdates": {"risk_tolerance": "moderate"}},
        )
        self.store.commit()

        rows = self.store.list_messages("s1")
        messages = [to_message(r) for r in rows]
        self.assertEqual([m.role for m in messages], ["user", "assistant"])
        self.assertEqual(messages[0].request_id, "r1")
        self.assertTrue(messages[1].requires_confirmation)
        self.assertTrue(self.store.has_unresolved_confirmation("s1"))

    def test_update_context_merges(self):
        self.store.create_session(session_id="s1")
        row = self.store.add_message(
            "s1", role="assistant", content="svar", context={"requestId": "r1", "requiresConfirmation": True}
        )
        self.store.commit()

        updated = self.store.update_message_context(row.id, {"requiresConfirmation": False})
        self.store.commit()
        self.assertEqual(updated.context_data, {"requestId": "r1", "requiresConfirmation": False})
        self.assertFalse(self.store.has_unresolved_confirmation("s1"))
        with self.assertRaises(PersistenceConflict):
            ConversationStore(self.db, "u2").update_message_context(row.id, {"x": 1})

    def test_rename_and_delete(self):
        self.store.create_session("Gammal", session_id="s1")
        self.store.add_message("s1", role="user", content="hej")
        self.assertEqual(self.store.rename_session("s1", "  Ny   titel ").session_name, "Ny titel")
        with self.assertRaises(ValueError):
            self.store.rename_session("s1", "   ")

        self.store.delete_session("s1")
        self.store.commit()
        self.assertEqual(self.store.list_sessions(), [])
        self.assertEqual(self.db.query(ChatMessage).count(), 0)


class AsyncConversationStoreTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.factory = _session_factory()

    def tearDown(self):
        self.engine.dispose()

    def test_round_trip_through_worker_threads(self):
        store = AsyncConversationStore(self.factory, "u1")

        async def scenario():
            info = await store.create_session("Volvo")
            await store.append_message(info.id, role="user", content="hej", context={"requestId": "r1"})
            reply = await store.append_message(
                info.id, role="assistant", content="svar", context={"requestId": "r1", "requiresConfirmation": True}
            )
            pending = await store.has_unresolved_confirmation(info.id)
            await store.update_message_context(reply.id, {"requiresConfirmation": False})
            messages = await store.list_messages(info.id)
            sessions = await store.list_sessions()
            return info, pending, messages, sessions

        info, pending, messages, sessions = asyncio.run(scenario())
        self.assertTrue(pending)
        self.assertEqual([m.content for m in messages], ["hej", "svar"])
        self.assertFalse(messages[1].requires_confirmation)
        self.assertEqual([s.id for s in sessions], [info.id])

    def test_missing_session_raises(self):
        store = AsyncConversationStore(self.factory, "u1")
        with self.assertRaises(PersistenceConflict):
            asyncio.run(store.list_messages("nope"))


if __name__ == "__main__":
    unittest.main()
