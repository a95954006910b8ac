import pytest

from redisc.slots import HASH_SLOTS, slot, split_by_slot


@pytest.mark.parametrize(
    "key,expected",
    [
        ("", 0),
        ("a", 15495),
        ("b", 3300),
        ("ab", 13567),
        ("abc", 7638),
        ("a{b}", 3300),
        ("{a}b", 15495),
        ("{a}{b}", 15495),
        ("{}{a}{b}", 11267),
        ("a{b}c", 3300),
        ("{a}bc", 15495),
        ("{a}{b}{c}", 15495),
        ("{}{a}{b}{c}", 1044),
        ("a{bc}d", 12685),
        ("a{bcd}", 1872),
        ("{abcd}", 10294),
        ("abcd", 10294),
        ("{a", 10276),
        ("a}", 5921),
        ("123456789", 12739),
        ("a≠b", 11870),
        ("•", 97),
        ("a{}{b}c", 14872),
    ],
)
def test_slot(key, expected):
    assert slot(key) == expected


@pytest.mark.parametrize("key", ["a", "{a}b", "a≠b", "x{yz}w"])
def test_slot_accepts_bytes(key):
    assert slot(key.encode("utf-8")) == slot(key)


@pytest.mark.parametrize("key", ["", "a", "k" * 100, "{tag}rest", "•"])
def test_slot_in_range(key):
    assert 0 <= slot(key) < HASH_SLOTS


@pytest.mark.parametrize(
    "joined,expected",
    [
        ("", []),
        ("a", ["a"]),
        ("a,b", ["b", "a"]),
        ("a,b,cb{a}", ["b", "a,cb{a}"]),
        ("a,b,cb{a},a{b}", ["b,a{b}", "a,cb{a}"]),
        ("a,b,cb{a},a{b},abc", ["b,a{b}", "abc", "a,cb{a}"]),
    ],
)
def test_split_by_slot(joined, expected):
    keys = joined.split(",") if joined else []
    assert split_by_slot(keys) == [group.split(",") for group in expected]


def test_split_by_slot_groups_share_a_slot_and_keep_every_key():
    keys = ["a", "b", "c", "{a}1", "{b}2", "abc", "{c}x", "d"]
    groups = split_by_slot(keys)
    assert sorted(k for g in groups for k in g) == sorted(keys)
    group_slots = [slot(g[0]) for g in groups]
    assert group_slots == sorted(group_slots)
    for group in groups:
        assert len({slot(k) for k in group}) == 1


def test_split_by_slot_accepts_generator():
    assert split_by_slot(k for k in ["a", "b"]) == [["b"], ["a"]]