"""Tests for the AI signal buffer."""

from query_stream.signals import SignalBuffer


class TestSignalBuffer:
    def test_add_and_consume(self):
        buf = SignalBuffer()
        buf.add("section_expanded", section_id="pipeline")
        buf.add("micro_action", action_id="draft_email")
        signals = buf.consume()
        assert [s["type"] for s in signals] == ["section_expanded", "micro_action"]
        assert signals[0]["sectionId"] == "pipeline"
        assert "actionId" not in signals[0]
        assert signals[1]["actionId"] == "draft_email"
        assert "timestamp" in signals[0]
        assert len(buf) == 0

    def test_keeps_most_recent(self):
        buf = SignalBuffer(max_pending=3)
        for i in range(5):
            buf.add("t", section_id=str(i))
        assert [s["sectionId"] for s in buf.consume()] == ["2", "3", "4"]

    def test_ignored_while_offline(self):
        buf = SignalBuffer()
        buf.online = False
        buf.add("t")
        assert buf.consume() == []
