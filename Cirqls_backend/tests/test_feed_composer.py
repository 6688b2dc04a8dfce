from datetime import datetime, timedelta, timezone

import pytest

from app.errors import DataIntegrityFailure
from app.services.feed_composer import build_post, compose_feed
from schemas.feed import MediaPost, TextPost

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def post(post_id, minutes_ago=0, type="text", user_id=1):
    return {
        "type": type,
        "post_id": post_id,
        "title": f"post {post_id}",
        "description": "body" if type == "text" else None,
        "media_src": "https://cdn.example/img.png" if type == "media" else None,
        "created_at": NOW - timedelta(minutes=minutes_ago),
        "user_id": user_id,
        "username": f"user{user_id}",
        "profile_pic_src": None,
        "community_id": 10,
        "community_name": "python",
        "community_title": "Python",
        "community_logo_src": None,
    }


def likes(count):
    return [{"user_id": 100 + i, "type": "like"} for i in range(count)]


def test_top_orders_by_total_reactions_over_recency():
    rows = [post(1, minutes_ago=60), post(2, minutes_ago=1)]
    reactions = {1: likes(5), 2: likes(3)}
    feed = compose_feed(rows, "top", reactions_by_post=reactions, now=NOW)
    assert [p.post_id for p in feed] == [1, 2]


def test_new_orders_newest_first():
    rows = [post(1, minutes_ago=60), post(2, minutes_ago=1), post(3, minutes_ago=30)]
    feed = compose_feed(rows, "new", now=NOW)
    assert [p.post_id for p in feed] == [2, 3, 1]


def test_new_breaks_timestamp_ties_by_post_id():
    rows = [post(1, minutes_ago=5), post(3, minutes_ago=5), post(2, minutes_ago=5)]
    feed = compose_feed(rows, "new", now=NOW)
    assert [p.post_id for p in feed] == [3, 2, 1]


def test_top_ties_keep_new_order():
    rows = [post(1, minutes_ago=60), post(2, minutes_ago=10), post(3, minutes_ago=30)]
    reactions = {1: likes(2), 2: likes(2), 3: likes(2)}
    feed = compose_feed(rows, "top", reactions_by_post=reactions, now=NOW)
    assert [p.post_id for p in feed] == [2, 3, 1]


def test_limit_applies_after_ordering():
    rows = [post(i, minutes_ago=i) for i in range(1, 6)]
    feed = compose_feed(rows, "new", limit=2, now=NOW)
    assert [p.post_id for p in feed] == [1, 2]


def test_unknown_sort_mode_is_rejected():
    with pytest.raises(ValueError):
        compose_feed([post(1)], "hot", now=NOW)


def test_variants_follow_type_column():
    text = build_post(post(1), now=NOW)
    media = build_post(post(2, type="media"), now=NOW)
    assert isinstance(text, TextPost) and text.description == "body"
    assert isinstance(media, MediaPost) and media.media_src.endswith("img.png")


def test_unknown_type_is_integrity_failure():
    with pytest.raises(DataIntegrityFailure):
        build_post(post(1, type="poll"), now=NOW)


def test_post_carries_comment_info_and_viewer_reaction():
    row = post(1, minutes_ago=2)
    built = build_post(row, [{"user_id": 5, "type": "dislike"}], [11, 12], viewer_id=5, now=NOW)
    assert built.comments_info.total == 2
    assert built.comments_info.comment_ids == [11, 12]
    assert built.reactions.viewer_reaction == "dislike"
    assert built.created_since == "2 minutes ago"
    assert built.community.name == "python"
    assert built.poster.user_id == 1


def test_empty_feed():
    assert compose_feed([], "top", now=NOW) == []
