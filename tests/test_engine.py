"""End-to-end tests for the macro engine."""

import asyncio
import json
import os

import pytest

from macro_humanizer.cache import ContentCache
from macro_humanizer.command_model import MacroCodec, keyboard
from macro_humanizer.engine import MacroEngine
from macro_humanizer.errors import NotFoundError, ParseError, ValidationError
from macro_humanizer.humanizer import HumanizationSettings
from macro_humanizer.job_scheduler import JobScheduler


LOGIN_MACRO = b"""Mouse : 120 : 340 : Move : 0 : 0 : 0
DELAY : 80
Keyboard : a : KeyDown
DELAY : 40
Keyboard : a : KeyUp
DELAY : 60
Keyboard : Tab : KeyDown
DELAY : 35
Keyboard : Tab : KeyUp
"""

LOGIN_MACRO_SLOWER = LOGIN_MACRO.replace(b"DELAY : 40", b"DELAY : 95")


@pytest.fixture
def login_files(write_macro):
    return [
        write_macro("login_1.mcr", LOGIN_MACRO),
        write_macro("login_2.mcr", LOGIN_MACRO_SLOWER),
    ]


# ============================================================================
# Parsing and Mining
# ============================================================================

def test_parse_uses_content_cache(engine):
    first, file_hash = engine.parse_content(LOGIN_MACRO)
    assert engine.cache.get_cached_commands(file_hash).is_hit

    second, _ = engine.parse_content(LOGIN_MACRO)
    assert second == first


def test_parse_error_is_not_cached(engine):
    with pytest.raises(ParseError):
        engine.parse_content(b"Bogus : 1\n")
    assert engine.cache.invalidate("mcr:commands:*") == 0


def test_mine_patterns_stores_results(engine, login_files):
    patterns = engine.mine_patterns(login_files, min_length=3, min_frequency=2)

    assert patterns
    assert all(p.pattern_id is not None for p in patterns)
    assert all(0 <= p.confidence <= 1 and p.frequency >= 2 for p in patterns)
    assert len(engine.pattern_storage.get_all_patterns()) == len(patterns)
    assert max(len(p.command_sequence) for p in patterns) == 9


def test_mining_twice_hits_cache(engine, login_files):
    first, first_stats = engine.mine_patterns_with_stats(login_files, 3, 2)
    second, second_stats = engine.mine_patterns_with_stats(login_files, 3, 2)

    assert not first_stats.cache_hit
    assert second_stats.cache_hit
    assert [p.to_dict() for p in second] == [p.to_dict() for p in first]
    assert len(engine.pattern_storage.get_all_patterns()) == len(first)


def test_mining_params_change_bypasses_cache(engine, login_files):
    engine.mine_patterns(login_files, 3, 2)
    _, stats = engine.mine_patterns_with_stats(login_files, 5, 2)
    assert not stats.cache_hit


def test_unstored_mining_is_not_reused_for_storage(engine, login_files):
    dry_run = engine.mine_patterns(login_files, 3, 2, store=False)
    assert all(p.pattern_id is None for p in dry_run)

    patterns, stats = engine.mine_patterns_with_stats(login_files, 3, 2, store=True)

    assert not stats.cache_hit
    assert stats.patterns_stored == len(dry_run)
    assert all(p.pattern_id is not None for p in patterns)
    assert len(engine.pattern_storage.get_all_patterns()) == len(patterns)


def test_deleting_patterns_drops_cached_mining(engine, login_files):
    first = engine.mine_patterns(login_files, 3, 2)

    engine.delete_pattern(first[0].pattern_id)
    _, stats = engine.mine_patterns_with_stats(login_files, 3, 2)
    assert not stats.cache_hit

    engine.clear_patterns()
    patterns, stats = engine.mine_patterns_with_stats(login_files, 3, 2)
    assert not stats.cache_hit
    stored_ids = {p.pattern_id for p in engine.pattern_storage.get_all_patterns()}
    assert {p.pattern_id for p in patterns} == stored_ids


def test_cached_mining_with_missing_patterns_is_recomputed(engine, login_files):
    engine.mine_patterns(login_files, 3, 2)
    engine.pattern_storage.clear_all_patterns()

    patterns, stats = engine.mine_patterns_with_stats(login_files, 3, 2)

    assert not stats.cache_hit
    assert len(engine.pattern_storage.get_all_patterns()) == len(patterns)


def test_malformed_cached_mining_is_recomputed(engine, login_files):
    _, file_hash_1 = engine.load_commands(login_files[0])
    _, file_hash_2 = engine.load_commands(login_files[1])
    engine.cache.cache_pattern_analysis([file_hash_1, file_hash_2], {
        "min_length": 3,
        "min_frequency": 2,
        "patterns": [{"name": "stale"}],
    })

    patterns, stats = engine.mine_patterns_with_stats(login_files, 3, 2)

    assert not stats.cache_hit
    assert patterns


def test_mining_requires_two_files(engine, login_files):
    with pytest.raises(ValidationError):
        engine.mine_patterns(login_files[:1])


def test_mining_skips_unreadable_files(engine, login_files, write_macro):
    broken = write_macro("broken.mcr", b"Keyboard : a\n")

    patterns, stats = engine.mine_patterns_with_stats(login_files + [broken, "missing.mcr"])

    assert stats.files_skipped == 2
    assert stats.files_loaded == 2
    assert patterns


def test_mining_with_one_usable_file_yields_nothing(engine, login_files):
    patterns = engine.mine_patterns([login_files[0], "missing.mcr"])
    assert patterns == []


def test_mining_without_cache(db, file_store, login_files, rng):
    engine = MacroEngine(db, file_store, cache=ContentCache(None), scheduler=JobScheduler(), rng=rng)
    engine.initialize()

    assert engine.mine_patterns(login_files, 3, 2)


def test_find_similar_and_usage(engine, login_files):
    engine.mine_patterns(login_files, 3, 2)
    commands, _ = engine.load_commands(login_files[0])

    similar = engine.find_similar_patterns(commands, threshold=1.0)
    assert len(similar) == 1
    assert len(similar[0].command_sequence) == len(commands)

    usage = engine.record_pattern_usage(similar[0].pattern_id, login_files[0], success=True)
    assert usage["usage_count"] == 1
    assert usage["cached_usage_count"] == 1

    with pytest.raises(NotFoundError):
        engine.record_pattern_usage(9999, login_files[0])
    with pytest.raises(ValidationError):
        engine.find_similar_patterns(commands, threshold=1.5)


def test_export_patterns(engine, login_files):
    engine.mine_patterns(login_files, 3, 2)

    path = engine.export_patterns(min_confidence=0.0)

    with open(path) as f:
        export = json.load(f)
    assert os.path.basename(path) == "patterns_for_review.json"
    assert export["pattern_count"] == len(engine.pattern_storage.get_all_patterns())


# ============================================================================
# Transitions
# ============================================================================

def test_analyze_transitions_and_predict(engine, login_files):
    table = engine.analyze_transitions(login_files)

    assert table["keyboard:a"] == {"delay:wait": 4}
    predicted = engine.predict_next([keyboard("a", "keyup")], table)
    assert predicted.type == "delay"

    frame = engine.transition_matrix(table)
    assert frame.loc["mouse:Move", "delay:wait"] == 2


# ============================================================================
# Humanization
# ============================================================================

def test_humanize_file_with_settings(engine, login_files):
    result = engine.humanize_file(login_files[0], settings={"typingErrors": 0, "hesitationPauses": 0})

    assert not [c for c in result.commands if c.type == "mouse"]
    assert [c.key for c in result.commands if c.type == "keyboard"] == ["a", "a", "Tab", "Tab"]
    assert result.stats.mouse_removed == 1
    assert result.output_file_id is None


def test_humanize_file_saves_output(engine, login_files, file_store):
    result = engine.humanize_file(login_files[0], settings={"hesitationPauses": 0}, save=True)

    saved = MacroCodec().parse(file_store.load(result.output_file_id))
    assert [c.canonical_key for c in saved] == [c.canonical_key for c in result.commands]


def test_settings_resolution_order(engine):
    expert = engine.profile_storage.get_profile_by_name("Expert User")

    by_profile = engine.resolve_settings({"delayVariation": 99}, profile_id=expert.profile_id)
    assert by_profile.delay_variation == 6

    explicit = engine.resolve_settings({"delayVariation": 99})
    assert explicit.delay_variation == 99

    default = engine.resolve_settings()
    assert default.delay_variation == 25

    given = HumanizationSettings(delay_variation=3)
    assert engine.resolve_settings(given) is given


def test_humanize_rejects_bad_settings(engine):
    with pytest.raises(ValidationError):
        engine.humanize([keyboard("a")], settings={"minDelay": 500})


def test_humanize_unknown_file(engine):
    with pytest.raises(NotFoundError):
        engine.humanize_file("nothing.mcr")


# ============================================================================
# UI Elements
# ============================================================================

def test_generate_from_ui_elements_caches_analysis(engine):
    elements = [
        {"type": "textfield", "bounds": {"x": 0, "y": 0, "width": 100, "height": 20}, "text": "me"},
        {"type": "button", "bounds": {"x": 0, "y": 100, "width": 50, "height": 20}, "text": "Go"},
    ]

    commands = engine.generate_from_ui_elements("screen-1", elements)

    assert [c.key for c in commands if c.type == "keyboard"] == ["m", "m", "e", "e"]
    cached = engine.get_image_analysis("screen-1")
    assert cached.is_hit
    assert len(cached.value["elements"]) == 2
    assert len(cached.value["commands"]) == len(commands)


def test_generate_rejects_malformed_elements(engine):
    with pytest.raises(ValidationError):
        engine.generate_from_ui_elements("screen-2", [{"type": "button"}])


# ============================================================================
# Cache
# ============================================================================

def test_invalidate_file(engine, login_files):
    engine.load_commands(login_files[0])
    assert engine.invalidate_file(login_files[0]) == 1
    assert engine.clear_cache() is True


# ============================================================================
# Jobs
# ============================================================================

def test_background_jobs(engine, login_files):
    events = []
    engine.scheduler.queues["processing"].sink = events.append

    async def scenario():
        await engine.scheduler.start()
        try:
            humanize_id = engine.enqueue("processing", {"fileId": login_files[0]})
            mining_id = engine.enqueue("pattern-mining", {"fileIds": login_files, "minLength": 3})
            image_id = engine.enqueue("image-analysis", {
                "imageId": "shot",
                "elements": [{"type": "button", "bounds": {"x": 1, "y": 1, "width": 2, "height": 2}}],
            })
            bad_id = engine.enqueue("processing", {"fileName": "wrong key"})
            await asyncio.wait_for(engine.scheduler.join(), timeout=10)
            await asyncio.sleep(0)
        finally:
            await engine.scheduler.close()
        return humanize_id, mining_id, image_id, bad_id

    humanize_id, mining_id, image_id, bad_id = asyncio.run(scenario())

    humanized = engine.get_job_status(humanize_id)
    assert humanized["state"] == "completed"
    assert humanized["result"]["outputFileId"]

    mined = engine.get_job_status(mining_id)
    assert mined["state"] == "completed"
    assert mined["result"]["patternIds"]

    assert engine.get_job_status(image_id)["result"]["commandCount"] == 5

    bad = engine.get_job_status(bad_id)
    assert bad["state"] == "failed"
    assert bad["attemptsMade"] == 1

    assert any(e["state"] == "progress" for e in events if e["jobId"] == humanize_id)
