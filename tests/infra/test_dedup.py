"""
Message Deduplication Tests
"""

from infra.dedup import MessageDeduplicator, build_dedup_key


class TestDedupKey:

    def test_msg_id_preferred(self):
        assert build_dedup_key("default", "oUser", "123", "1700000000") == "default:oUser:123"

    def test_create_time_for_events(self):
        assert build_dedup_key("default", "oUser", None, "1700000000") == "default:oUser:1700000000"


class TestMessageDeduplicator:

    def test_first_sight_passes_repeat_dropped(self, clock):
        dedup = MessageDeduplicator(clock=clock)
        assert dedup.check_and_mark("k")
        assert not dedup.check_and_mark("k")
        clock.advance(29)
        assert not dedup.check_and_mark("k")

    def test_key_expires_after_window(self, clock):
        dedup = MessageDeduplicator(window_s=30, clock=clock)
        dedup.check_and_mark("k")
        clock.advance(30)
        assert dedup.check_and_mark("k")

    def test_repeat_does_not_extend_window(self, clock):
        dedup = MessageDeduplicator(window_s=30, clock=clock)
        dedup.check_and_mark("k")
        clock.advance(20)
        dedup.check_and_mark("k")
        clock.advance(11)
        assert dedup.check_and_mark("k")

    def test_bounded_size(self, clock):
        dedup = MessageDeduplicator(max_keys=3, clock=clock)
        for key in "abcd":
            dedup.check_and_mark(key)
        assert len(dedup) == 3
        assert dedup.check_and_mark("a")
