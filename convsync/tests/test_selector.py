import unittest
from datetime import datetime, timedelta, timezone

from convsync.models import RawContextSnapshot
from convsync.selector import SessionContextSelector, should_replace

SESSION_ID = "3f1c2b4a-1234-4abc-9def-0123456789ab"
T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def _snapshot(universal: bool, offset_minutes: int, session_id: str = SESSION_ID) -> RawContextSnapshot:
    return RawContextSnapshot(
        session_id=session_id,
        log_text=f"{session_id} {'universal' if universal else 'model'} @{offset_minutes}",
        timestamp=T0 + timedelta(minutes=offset_minutes),
        is_universal=universal,
    )


class SelectorTests(unittest.TestCase):
    def test_universal_wins_then_latest_wins(self) -> None:
        selector = SessionContextSelector()
        model_t1 = _snapshot(False, 1)
        universal_t0 = _snapshot(True, 0)
        universal_t2 = _snapshot(True, 2)

        self.assertTrue(selector.offer(model_t1))
        self.assertTrue(selector.offer(universal_t0))
        self.assertTrue(selector.offer(universal_t2))

        self.assertEqual(selector.get(SESSION_ID), universal_t2)
        self.assertEqual(len(selector), 1)

    def test_model_specific_never_replaces_universal(self) -> None:
        self.assertFalse(should_replace(_snapshot(True, 0), _snapshot(False, 10)))

    def test_equal_kind_requires_strictly_later_timestamp(self) -> None:
        self.assertFalse(should_replace(_snapshot(False, 5), _snapshot(False, 5)))
        self.assertFalse(should_replace(_snapshot(True, 5), _snapshot(True, 4)))
        self.assertTrue(should_replace(None, _snapshot(False, 0)))

    def test_offer_log_discards_lines_without_session_id(self) -> None:
        selector = SessionContextSelector()

        self.assertFalse(selector.offer_log("Generating chat from universal context []", T0))
        self.assertTrue(selector.offer_log(f"{SESSION_ID} Generating chat from universal context []", T0))

        self.assertEqual(selector.discarded, 1)
        self.assertIn(SESSION_ID, selector)
        self.assertTrue(selector.get(SESSION_ID).is_universal)

    def test_sessions_are_tracked_independently(self) -> None:
        selector = SessionContextSelector()
        other = "00000000-0000-4000-8000-000000000000"
        selector.offer(_snapshot(False, 0))
        selector.offer(_snapshot(False, 0, other))
        self.assertEqual({s.session_id for s in selector.snapshots()}, {SESSION_ID, other})


if __name__ == "__main__":
    unittest.main()
