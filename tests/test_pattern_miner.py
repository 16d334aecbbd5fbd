"""Tests for frequent-subsequence mining and similarity lookup."""

import pytest

from macro_humanizer.command_model import delay, keyboard, mouse
from macro_humanizer.pattern_miner import LabeledSequence, Pattern, PatternMiner


def _mining_example():
    return [
        LabeledSequence("f1", [keyboard("a"), delay(50), keyboard("b")]),
        LabeledSequence("f2", [keyboard("a"), delay(55), keyboard("b"), keyboard("c")]),
    ]


def test_delay_values_do_not_split_patterns():
    patterns = PatternMiner().mine(_mining_example(), min_length=2, min_frequency=2)

    keys = [[c.canonical_key for c in p.command_sequence] for p in patterns]
    assert keys == [
        ["keyboard:keydown:a", "delay:wait:"],
        ["delay:wait:", "keyboard:keydown:b"],
        ["keyboard:keydown:a", "delay:wait:", "keyboard:keydown:b"],
    ]
    assert all(p.frequency == 2 for p in patterns)
    assert all(p.source_file_ids == ["f1", "f2"] for p in patterns)


def test_confidence_is_frequency_over_twice_the_sources():
    patterns = PatternMiner().mine(_mining_example(), min_length=2, min_frequency=2)
    assert patterns[0].confidence == pytest.approx(0.5)


def test_confidence_capped_at_one():
    miner = PatternMiner()
    assert miner.calculate_confidence(10, 2) == 1.0
    assert miner.calculate_confidence(3, 0) == 0.0


def test_fewer_than_two_sequences_yields_nothing():
    single = [LabeledSequence("f1", [keyboard("a")] * 10)]
    assert PatternMiner().mine(single, min_length=2, min_frequency=2) == []


def test_frequency_threshold_respected():
    sequences = [
        LabeledSequence("f1", [keyboard("x"), keyboard("y"), keyboard("z")]),
        LabeledSequence("f2", [keyboard("x"), keyboard("y"), keyboard("q")]),
    ]
    patterns = PatternMiner().mine(sequences, min_length=2, min_frequency=3)
    assert patterns == []


def test_ranked_by_frequency_descending():
    sequences = [
        LabeledSequence("f1", [keyboard("a"), keyboard("b"), keyboard("a"), keyboard("b")]),
        LabeledSequence("f2", [keyboard("a"), keyboard("b"), keyboard("c")]),
    ]
    patterns = PatternMiner().mine(sequences, min_length=2, min_frequency=2)

    frequencies = [p.frequency for p in patterns]
    assert frequencies == sorted(frequencies, reverse=True)
    assert patterns[0].frequency == 3
    assert patterns[0].name == "Pattern: a-b"


def test_window_length_capped():
    long_run = [keyboard(str(i % 10)) for i in range(40)]
    sequences = [LabeledSequence("f1", long_run), LabeledSequence("f2", list(long_run))]

    miner = PatternMiner(max_window_length=5, max_patterns=1000)
    patterns = miner.mine(sequences, min_length=3, min_frequency=2)

    assert patterns
    assert max(len(p.command_sequence) for p in patterns) == 5


def test_max_patterns_limit():
    long_run = [keyboard(str(i)) for i in range(30)]
    sequences = [LabeledSequence("f1", long_run), LabeledSequence("f2", list(long_run))]

    patterns = PatternMiner(max_patterns=7).mine(sequences, min_length=2, min_frequency=2)
    assert len(patterns) == 7


def test_mining_is_idempotent():
    miner = PatternMiner()
    first = [p.to_dict() for p in miner.mine(_mining_example(), 2, 2)]
    second = [p.to_dict() for p in miner.mine(_mining_example(), 2, 2)]
    assert first == second


def test_metadata_from_delays():
    sequence = [keyboard("a"), delay(40), keyboard("b"), delay(60), keyboard("c")]
    metadata = PatternMiner().calculate_metadata(sequence)

    assert metadata.average_duration == pytest.approx(50.0)
    assert metadata.variation_std_dev == pytest.approx(10.0)
    assert metadata.times_used == 0
    assert metadata.success_rate == 1.0


def test_metadata_without_delays():
    metadata = PatternMiner().calculate_metadata([keyboard("a"), delay(30)])
    assert metadata.average_duration == pytest.approx(30.0)
    assert metadata.variation_std_dev == 0.0


def test_generated_names():
    miner = PatternMiner()
    assert miner.generate_name([mouse(1, 1), delay(5)]) == "Pattern: 2 commands"
    assert len(miner.generate_name([keyboard("LongKeyName")] * 10)) <= len("Pattern: ") + 30


def test_similarity_counts_positional_matches():
    first = [keyboard("a"), keyboard("b"), keyboard("c"), keyboard("d")]
    second = [keyboard("a"), keyboard("x"), keyboard("c")]

    assert PatternMiner.similarity(first, second) == pytest.approx(2 / 4)
    assert PatternMiner.similarity([], second) == 0.0


def test_find_similar_sorted_and_thresholded():
    target = [keyboard("a"), keyboard("b"), keyboard("c"), keyboard("d"), keyboard("e")]
    exact = Pattern("exact", list(target), 2, 0.5)
    close = Pattern("close", target[:4] + [keyboard("z")], 2, 0.5)
    far = Pattern("far", [keyboard("z")] * 5, 2, 0.5)

    found = PatternMiner().find_similar(target, [far, close, exact], threshold=0.8)
    assert [p.name for p in found] == ["exact", "close"]
