"""
Tests for the pattern evaluator.

Covers span partitioning, alternation, euclidean rhythms, every transform,
operations, modulation and determinism of queries.
"""

from fractions import Fraction as F

import pytest

import loopscript as ls
from loopscript import Event, Leaf, Sequence, Transform


def values(text, cycle=0, **kwargs):
    return [ev.value for ev in ls.query(ls.parse(text), cycle, **kwargs)]


def spans(text, cycle=0, **kwargs):
    return [(ev.start, ev.end) for ev in ls.query(ls.parse(text), cycle, **kwargs)]


class TestEndToEnd:

    def test_repeated_group(self):
        """'[bd sn]*2' gives bd sn bd sn on quarter notes."""
        events = ls.query(ls.parse("[bd sn]*2"))
        assert [ev.value for ev in events] == ["bd", "sn", "bd", "sn"]
        assert [ev.start for ev in events] == [0, 0.25, 0.5, 0.75]
        assert all(ev.duration == F(1, 4) for ev in events)
        assert all(ev.has_onset() for ev in events)


class TestSequence:

    def test_nested_spans(self):
        assert spans("[[a b] c]") == [(0, F(1, 4)), (F(1, 4), F(1, 2)), (F(1, 2), 1)]

    @pytest.mark.parametrize("n", [1, 2, 3, 5, 7, 12])
    def test_children_partition_the_span(self, n):
        result = spans(" ".join(f"x{i}" for i in range(n)))
        assert result[0][0] == 0
        assert result[-1][1] == 1
        for (s1, e1), (s2, e2) in zip(result, result[1:]):
            assert s1 < e1 == s2 < e2

    def test_child_order_is_preserved(self):
        assert values("a [b c] d") == ["a", "b", "c", "d"]

    def test_empty_groups_are_silent(self):
        assert values("") == []
        assert spans("a [] b") == [(0, F(1, 3)), (F(2, 3), 1)]

    def test_arc_filter(self):
        root = ls.parse("a b c d")
        assert [ev.value for ev in ls.query(root, arc=(F(1, 4), F(3, 4)))] == ["b", "c"]
        assert [ev.value for ev in ls.query(root, arc=(0.3, 0.31))] == ["b"]

    def test_query_at(self):
        root = ls.parse("a b")
        assert [ev.value for ev in ls.query_at(root, 0.75)] == ["b"]
        assert [ev.value for ev in ls.query_at(root, 3.25)] == ["a"]


class TestParallel:

    def test_round_robin(self):
        root = ls.parse("<a b c>")
        assert [ls.query(root, c)[0].value for c in range(6)] == ["a", "b", "c", "a", "b", "c"]

    def test_nested_alternation_advances_when_chosen(self):
        root = ls.parse("<a <b c>>")
        assert [ls.query(root, c)[0].value for c in range(4)] == ["a", "b", "a", "c"]

    def test_alternation_inside_sequence(self):
        assert values("x <a b>", cycle=1) == ["x", "b"]

    def test_pluggable_policy(self):
        root = ls.parse("<a b c>")
        always_last = lambda cycle, count, seed: count - 1
        assert ls.query(root, 0, choose=always_last)[0].value == "c"

    def test_random_policy_is_seeded(self):
        root = ls.parse("<a b c d e f>")
        first = [ls.query(root, c, seed=7, choose=ls.random_choice)[0].value for c in range(20)]
        again = [ls.query(root, c, seed=7, choose=ls.random_choice)[0].value for c in range(20)]
        assert first == again
        assert ls.policies["random"] is ls.random_choice

    def test_policy_by_name(self):
        root = ls.parse("<a b c d e f>")
        by_name = [ls.query(root, c, seed=7, choose="random")[0].value for c in range(10)]
        by_fn = [ls.query(root, c, seed=7, choose=ls.random_choice)[0].value for c in range(10)]
        assert by_name == by_fn
        assert ls.query(root, 4, choose="ROUND_ROBIN")[0].value == "e"

    def test_registered_policy(self):
        ls.policies.add("first", lambda cycle, count, seed: 0)
        try:
            root = ls.parse("<a b c>")
            assert [ls.query(root, c, choose="first")[0].value for c in range(3)] == ["a"] * 3
        finally:
            del ls.policies._data["first"]

    def test_unknown_policy(self):
        with pytest.raises(ValueError, match="unknown choice policy"):
            ls.query(ls.parse("<a b>"), choose="shuffle")


class TestEuclidean:

    def test_reference_mask(self):
        assert ls.euclidean(8, 3, 0) == [True, False, False, True, False, False, True, False]

    @pytest.mark.parametrize("steps", range(1, 17))
    def test_pulse_count(self, steps):
        for pulses in range(1, steps + 1):
            assert sum(ls.euclidean(steps, pulses)) == pulses

    def test_rotation_is_cyclic_left(self):
        base = ls.euclidean(8, 3)
        assert ls.euclidean(8, 3, 1) == base[1:] + base[:1]
        assert ls.euclidean(8, 3, 9) == ls.euclidean(8, 3, 1)
        assert ls.euclidean(8, 3, -1) == base[-1:] + base[:-1]

    def test_no_pulses(self):
        assert ls.euclidean(4, 0) == [False] * 4

    def test_events(self):
        events = ls.query(ls.parse("bd/8:3"))
        assert [ev.start for ev in events] == [0, F(3, 8), F(6, 8)]
        assert all(ev.duration == F(1, 8) for ev in events)
        assert {ev.value for ev in events} == {"bd"}

    def test_standalone_value(self):
        assert values("/4:4") == [1, 1, 1, 1]

    def test_group_fills_each_pulse(self):
        assert values("[a b]/4:2") == ["a", "b", "a", "b"]


class TestRev:

    def test_reverses_order(self):
        assert values("a b c . rev") == ["c", "b", "a"]

    def test_keeps_span_boundaries(self):
        assert spans("[a b] c . rev") == [(0, F(1, 2)), (F(1, 2), F(3, 4)), (F(3, 4), 1)]

    @pytest.mark.parametrize("text", [
        "a b c", "[a b] c", "<a b> c/8:3", "a b . fast 3", "a [b c] . chop 3", "a b c . degrade 0.5",
    ])
    def test_involution(self, text):
        node = ls.parse(text)
        twice = Transform(Transform(node, "rev"), "rev")
        for cycle in range(4):
            assert ls.query(twice, cycle) == ls.query(node, cycle)


class TestPalindrome:

    def test_forward_then_backward(self):
        events = ls.query(ls.parse("a b . palindrome"))
        assert [ev.value for ev in events] == ["a", "b", "b", "a"]
        assert all(ev.duration == F(1, 4) for ev in events)


class TestFastSlow:

    def test_fast(self):
        assert values("a b . fast 2") == ["a", "b", "a", "b"]

    def test_fast_fractional(self):
        # 1.5 cycles of [a b] per cycle: a b a, then b a b
        assert values("a b . fast 1.5", cycle=0) == ["a", "b", "a"]
        assert values("a b . fast 1.5", cycle=1) == ["b", "a", "b"]

    def test_fast_advances_alternation(self):
        assert values("<a b> . fast 2") == ["a", "b"]

    def test_fast_zero_is_silence(self):
        assert values("a b . fast 0") == []

    def test_slow_spreads_over_cycles(self):
        assert values("a b . slow 2", cycle=0) == ["a"]
        assert values("a b . slow 2", cycle=1) == ["b"]
        assert spans("a b . slow 2", cycle=1) == [(0, 1)]

    def test_slow_clips_and_marks_onsets(self):
        events = ls.query(ls.parse("a b . slow 3"), 1)
        assert [(ev.value, ev.start, ev.end) for ev in events] == [
            ("a", 0, F(1, 2)), ("b", F(1, 2), 1)]
        assert events[0].whole == (-1, F(1, 2))
        assert not events[0].has_onset()
        assert events[1].whole == (F(1, 2), 2)
        assert events[1].has_onset()

    def test_star_on_name_repeats(self):
        assert values("bd*3") == ["bd", "bd", "bd"]


class TestDegrade:

    def test_deterministic_for_seed(self):
        text = " ".join("x" for _ in range(32)) + " . degrade 0.5"
        assert values(text, seed=3) == values(text, seed=3)
        assert 0 < len(values(text, seed=3)) < 32

    def test_seed_changes_result(self):
        text = " ".join(str(i) for i in range(32)) + " . degrade 0.5"
        results = {tuple(values(text, seed=s)) for s in range(5)}
        assert len(results) > 1

    def test_bounds(self):
        assert values("a b c d . degrade 0") == ["a", "b", "c", "d"]
        assert values("a b c d . degrade 1") == []


class TestChop:

    def test_fragments(self):
        events = ls.query(ls.parse("a . chop 4"))
        assert len(events) == 4
        assert [ev.part for ev in events] == [0, 1, 2, 3]
        assert events[0].start == 0 and events[-1].end == 1
        for left, right in zip(events, events[1:]):
            assert left.end == right.start
        assert all(ev.duration == F(1, 4) for ev in events)

    def test_per_event(self):
        events = ls.query(ls.parse("a b . chop 4"))
        assert [ev.value for ev in events] == ["a"] * 4 + ["b"] * 4
        assert [ev.part for ev in events] == [0, 1, 2, 3] * 2

    def test_clipped_tail_keeps_no_onset(self):
        """Fragments are cut along the whole event, not the clipped piece."""
        events = ls.query(ls.parse("a . slow 3 . chop 2"), 1)
        assert [(ev.part, ev.start, ev.end) for ev in events] == [
            (0, 0, F(1, 2)), (1, F(1, 2), 1)]
        assert events[0].whole == (-1, F(1, 2))
        assert not events[0].has_onset()
        assert events[1].has_onset()

    def test_slow_then_chop_one_fragment_per_cycle(self):
        root = ls.parse("a . slow 2 . chop 2")
        assert [(ev.part, ev.has_onset()) for ev in ls.query(root, 0)] == [(0, True)]
        assert [(ev.part, ev.has_onset()) for ev in ls.query(root, 1)] == [(1, True)]


class TestConditional:

    def test_every(self):
        text = "a b . every 2 rev"
        assert values(text, cycle=0) == ["b", "a"]
        assert values(text, cycle=1) == ["a", "b"]
        assert values(text, cycle=2) == ["b", "a"]

    def test_every_with_operands(self):
        assert values("a b . every 3 fast 2", cycle=3) == ["a", "b", "a", "b"]
        assert values("a b . every 3 fast 2", cycle=4) == ["a", "b"]

    def test_when(self):
        text = "a b . when 4 2 rev"
        assert [values(text, cycle=c)[0] for c in range(8)] == list("aabbaabb")

    def test_sometimes_bounds(self):
        for cycle in range(10):
            assert values("a b . sometimes 1 rev", cycle=cycle) == ["b", "a"]
            assert values("a b . sometimes 0 rev", cycle=cycle) == ["a", "b"]

    def test_sometimes_is_deterministic(self):
        text = "a b . sometimes rev"
        first = [tuple(values(text, cycle=c, seed=11)) for c in range(16)]
        assert first == [tuple(values(text, cycle=c, seed=11)) for c in range(16)]
        assert set(first) == {("a", "b"), ("b", "a")}


class TestOperation:

    def test_numeric_leaf_arithmetic(self):
        assert values("3 * 2") == [6]
        assert values("1 2 + 10") == [1, 12]
        assert values("7 % 3") == [1]
        assert values("1 - 4") == [-3]

    def test_group_arithmetic(self):
        assert values("[1 2 3] + 10") == [11, 12, 13]
        assert values("[1 2 3] % 2") == [1, 0, 1]

    def test_times_unaffected(self):
        assert spans("[1 2] + 10") == spans("[1 2]")

    def test_names_untouched(self):
        assert values("[a 1] + 1") == ["a", 2]


class TestModulation:

    def test_zero_amount_is_identity(self):
        assert ls.query(ls.parse("a b ~ 0")) == ls.query(ls.parse("a b"))

    def test_sine_offset(self):
        root = ls.parse("[a b] ~ 0.1 0.25")
        # cycle 0: sin(0) = 0 for a
        assert ls.query(root, 0)[0].start == 0
        # cycle 1: sin(pi/2) = 1 for a, shifted by 0.1 of the span
        events = ls.query(root, 1)
        assert events[0].start == F(1, 10)
        assert events[0].duration == F(1, 2)
        # b is pushed late but stays inside the cycle
        assert events[1].end == 1

    def test_stays_inside_cycle(self):
        root = ls.parse("[a b c d] ~ 0.3 0.7")
        for cycle in range(8):
            for ev in ls.query(root, cycle):
                assert 0 <= ev.start < ev.end <= 1
                assert ev.duration == F(1, 4)


class TestPurity:

    @pytest.mark.parametrize("text", [
        "[bd sn]*2 <hh oh>",
        "bd/8:3 . every 2 rev",
        "a b c d . degrade 0.3 . chop 2",
        "<a b> ~ 0.05 2 . sometimes fast 2",
    ])
    def test_queries_are_deterministic(self, text):
        root = ls.parse(text)
        for cycle in range(6):
            assert ls.query(root, cycle, seed=5) == ls.query(root, cycle, seed=5)

    def test_sub_arc_matches_full_cycle(self):
        root = ls.parse("a b c d e f . degrade 0.5")
        full = ls.query(root, 2, seed=1)
        late = ls.query(root, 2, arc=(F(1, 2), 1), seed=1)
        assert late == [ev for ev in full if ev.end > F(1, 2)]

    def test_events_are_immutable(self):
        ev = ls.query(ls.parse("a"))[0]
        with pytest.raises(AttributeError):
            ev.value = "b"

    def test_handwritten_tree(self):
        node = Sequence((Leaf("a"), Transform(Sequence((Leaf("b"), Leaf("c"))), "rev")))
        assert ls.query(node) == [
            Event("a", F(0), F(1, 2)),
            Event("c", F(1, 2), F(3, 4)),
            Event("b", F(3, 4), F(1)),
        ]

    def test_rejects_non_nodes(self):
        with pytest.raises(TypeError):
            ls.query("a b")
