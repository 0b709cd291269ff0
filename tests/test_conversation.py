"""Tests for Conversation and its pure transformations."""

from __future__ import annotations

from query_stream import conversation as conv
from query_stream.conversation import Conversation
from query_stream.types import ChartPayload, Message, Role


def _user(text: str) -> Message:
    return Message(role=Role.USER, content=text)


def _assistant(text: str, **kw) -> Message:
    return Message(role=Role.ASSISTANT, content=text, **kw)


class TestTransforms:
    def test_append_and_patch(self):
        c = Conversation()
        placeholder = _assistant("", streaming=True)
        c.apply(conv.append(placeholder))
        c.apply(conv.patch(placeholder.id, content="Hi"))
        assert c.get(placeholder.id).content == "Hi"
        assert c.get(placeholder.id).streaming

    def test_patch_after_remove_is_noop(self):
        c = Conversation()
        placeholder = _assistant("", streaming=True)
        c.apply(conv.append(placeholder))
        stale = conv.patch(placeholder.id, content="late")
        c.apply(conv.remove(placeholder.id))
        c.apply(stale)
        assert len(c) == 0

    def test_replace_message(self):
        c = Conversation([_user("q")])
        placeholder = _assistant("", streaming=True)
        c.apply(conv.append(placeholder))
        final = _assistant("answer", id=placeholder.id)
        c.apply(conv.replace_message(placeholder.id, final))
        assert c.messages[-1] is final
        assert not c.messages[-1].streaming

    def test_remove_many(self):
        a, b, d = _user("a"), _user("b"), _user("d")
        c = Conversation([a, b, d])
        c.apply(conv.remove(a.id, d.id))
        assert c.messages == (b,)

    def test_messages_are_tuples(self):
        c = Conversation()
        before = c.messages
        c.apply(conv.append(_user("x")))
        assert before == ()


class TestListeners:
    def test_notified_on_change_only(self):
        c = Conversation()
        calls = []
        c.subscribe(calls.append)
        m = _user("x")
        c.apply(conv.append(m))
        c.apply(conv.patch("missing", content="y"))
        assert len(calls) == 1
        assert calls[0] == (m,)

    def test_clear(self):
        c = Conversation([_user("x")])
        c.clear()
        assert len(c) == 0


class TestHistory:
    def test_excludes_charts_and_streaming(self):
        chart = ChartPayload(chart_type="bar", chart_data=[1])
        c = Conversation([
            _user("q1"),
            _assistant("with chart", chart=chart),
            _user("q2"),
            _assistant("", streaming=True),
        ])
        assert c.history() == [
            {"role": "user", "content": "q1"},
            {"role": "user", "content": "q2"},
        ]

    def test_limit(self):
        c = Conversation([_user(str(i)) for i in range(20)])
        history = c.history(limit=12)
        assert len(history) == 12
        assert history[0]["content"] == "8"
        assert c.history(limit=0) == []
