from conference.aggregator import StreamingAggregator
from conference.states import MessageType


def test_fragments_concatenate_in_order():
    agg = StreamingAggregator("c1")
    assert agg.snapshot.content == ""
    agg.feed("Hel")
    agg.feed("")
    agg.feed("lo")
    assert agg.content == "Hello"
    assert agg.chunks == 2


def test_every_feed_returns_a_new_snapshot():
    agg = StreamingAggregator("c1")
    first = agg.feed("a")
    second = agg.feed("b")
    assert first is not second
    assert first.content == "a"
    assert second.content == "ab"
    assert agg.snapshot is second


def test_commit_gets_its_own_identity():
    agg = StreamingAggregator("c1")
    live = agg.feed("done")
    message = agg.commit()
    assert message.content == "done"
    assert message.character_id == "c1"
    assert message.type is MessageType.AI
    assert message.id != live.id
    assert message.timestamp >= live.timestamp
