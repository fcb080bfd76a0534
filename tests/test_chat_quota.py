import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  (registers tables)
from database import Base
from models.user_subscription import UserSubscription
from services import chat_quota
from services.cache.cache_backend import cache_clear_local


class ChatQuotaTests(unittest.TestCase):
    def setUp(self):
        cache_clear_local()
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine)()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()
        cache_clear_local()

    def _subscribe(self, user_id, plan, status="active"):
        self.db.add(UserSubscription(user_id=user_id, plan=plan, status=status))
        self.db.commit()

    def test_free_plan_blocks_after_five(self):
        for _ in range(4):
            chat_quota.record_chat_message(self.db, "u1")
        status = chat_quota.check_chat_quota(self.db, "u1")
        self.assertTrue(status.allowed)
        self.assertEqual(status.remaining, 1)

        last = chat_quota.record_chat_message(self.db, "u1")
        self.assertFalse(last.allowed)
        self.assertEqual((last.used, last.limit, last.plan), (5, 5, "free"))
        self.assertFalse(chat_quota.check_chat_quota(self.db, "u1").allowed)

    def test_usage_is_per_user(self):
        chat_quota.record_chat_message(self.db, "u1")
        self.assertEqual(chat_quota.get_usage("u1"), 1)
        self.assertEqual(chat_quota.get_usage("u2"), 0)

    def test_active_subscription_sets_plan(self):
        self._subscribe("u1", "premium")
        status = chat_quota.check_chat_quota(self.db, "u1")
        self.assertEqual((status.plan, status.limit), ("premium", 200))

        self._subscribe("u2", "pro", status="trialing")
        unlimited = chat_quota.check_chat_quota(self.db, "u2")
        self.assertTrue(unlimited.allowed)
        self.assertIsNone(unlimited.remaining)

    def test_lapsed_subscription_counts_as_free(self):
        self._subscribe("u1", "premium", status="canceled")
        self.assertEqual(chat_quota.get_user_plan(self.db, "u1"), "free")

    def test_plan_is_cached(self):
        self.assertEqual(chat_quota.get_user_plan(self.db, "u1"), "free")
        self._subscribe("u1", "premium")
        self.assertEqual(chat_quota.get_user_plan(self.db, "u1"), "free")
        cache_clear_local()
        self.assertEqual(chat_quota.get_user_plan(self.db, "u1"), "premium")

    def test_exceeded_detail_shape(self):
        status = chat_quota.check_chat_quota(self.db, "u1")
        detail = chat_quota.quota_exceeded_detail(status)
        self.assertEqual(detail["code"], "quota_exceeded")
        self.assertEqual(detail["limit"], 5)
        self.assertIn("message", detail)


if __name__ == "__main__":
    unittest.main()
