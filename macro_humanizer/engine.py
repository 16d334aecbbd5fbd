"""
Macro humanizer engine.

Composition root that wires every collaborator together and exposes the
public operations:
1. Parse macro files (through the content cache)
2. Mine recurring command patterns across recordings
3. Build transition tables and predict the next command
4. Humanize recordings with explicit settings or a stored profile
5. Generate macros from detected UI elements
6. Track pattern usage and export patterns for review
7. Run any of the above as background jobs

Nothing is created lazily: collaborators are either injected or built in
the constructor.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Optional, Tuple

import pandas as pd
import voluptuous as vol

from .cache import CacheResult, ContentCache, MemoryCacheBackend, SqlCacheBackend, content_hash
from .command_model import Command, MacroCodec, commands_to_dicts
from .const import (
    CACHE_BACKEND_MEMORY,
    CACHE_BACKEND_SQL,
    DEFAULT_MIN_FREQUENCY,
    DEFAULT_MIN_SEQUENCE_LENGTH,
    DEFAULT_SIMILARITY_THRESHOLD,
    QUEUE_IMAGE_ANALYSIS,
    QUEUE_PATTERN_MINING,
    QUEUE_PROCESSING,
)
from .database import DatabaseConnector
from .errors import NotFoundError, ParseError, ValidationError
from .exporter import MacroFileStore
from .humanizer import HumanizationSettings, HumanizationStats, Humanizer
from .job_scheduler import JobContext, JobScheduler
from .pattern_miner import LabeledSequence, Pattern, PatternMiner
from .pattern_storage import PatternStorage
from .profile_storage import ProfileStorage
from .transition_model import TransitionModel, TransitionTable
from .ui_commands import UICommandGenerator, UIElement

_LOGGER = logging.getLogger(__name__)


# ============================================================================
# Job Payloads
# ============================================================================

PROCESSING_PAYLOAD = vol.Schema({
    vol.Required("fileId"): str,
    vol.Optional("settings"): vol.Any(None, dict),
    vol.Optional("profileId"): vol.Any(None, int),
    vol.Optional("save", default=True): bool,
})

IMAGE_PAYLOAD = vol.Schema({
    vol.Required("imageId"): vol.Coerce(str),
    vol.Required("elements"): list,
})

MINING_PAYLOAD = vol.Schema({
    vol.Required("fileIds"): [str],
    vol.Optional("minLength"): vol.Any(None, int),
    vol.Optional("minFrequency"): vol.Any(None, int),
})


def _validate_payload(schema: vol.Schema, payload) -> Dict:
    try:
        return schema(payload)
    except vol.Invalid as e:
        raise ValidationError(f"Invalid job payload: {e}") from e


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class MiningStats:
    """Statistics from a pattern mining run."""
    files_requested: int
    files_loaded: int
    files_skipped: int
    patterns_discovered: int
    patterns_stored: int
    cache_hit: bool
    duration_seconds: float

    def to_dict(self) -> Dict:
        return {
            "files_requested": self.files_requested,
            "files_loaded": self.files_loaded,
            "files_skipped": self.files_skipped,
            "patterns_discovered": self.patterns_discovered,
            "patterns_stored": self.patterns_stored,
            "cache_hit": self.cache_hit,
            "run_duration_seconds": self.duration_seconds,
        }


@dataclass
class HumanizationResult:
    """A humanized recording and what changed."""
    source_file_id: str
    commands: List[Command]
    stats: HumanizationStats
    output_file_id: Optional[str] = None
    settings: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "sourceFileId": self.source_file_id,
            "outputFileId": self.output_file_id,
            "commandCount": len(self.commands),
            "stats": self.stats.to_dict(),
            "settings": self.settings,
        }


# ============================================================================
# Engine
# ============================================================================

class MacroEngine:
    """
    Main macro humanizer engine.

    Args:
        db: DatabaseConnector for patterns, profiles and the SQL cache
        file_store: Source of macro bytes by file id (needs load(file_id))
        cache: ContentCache, default is an in-memory cache
        scheduler: JobScheduler, default uses the standard queue settings
        rng: Random source shared by humanizer and UI generator
        min_length: Default shortest mined window
        min_frequency: Default minimum pattern frequency
    """

    def __init__(
        self,
        db: DatabaseConnector,
        file_store: MacroFileStore,
        cache: Optional[ContentCache] = None,
        scheduler: Optional[JobScheduler] = None,
        rng: Optional[random.Random] = None,
        min_length: int = DEFAULT_MIN_SEQUENCE_LENGTH,
        min_frequency: int = DEFAULT_MIN_FREQUENCY,
    ):
        self.db = db
        self.file_store = file_store
        self.cache = cache if cache is not None else ContentCache(MemoryCacheBackend())
        self.scheduler = scheduler if scheduler is not None else JobScheduler()
        self.rng = rng or random.Random()
        self.min_length = min_length
        self.min_frequency = min_frequency

        self.codec = MacroCodec()
        self.pattern_storage = PatternStorage(db)
        self.profile_storage = ProfileStorage(db)
        self.miner = PatternMiner()
        self.transitions = TransitionModel()
        self.humanizer = Humanizer(self.rng)
        self.ui_generator = UICommandGenerator(self.rng)

        self._register_job_handlers()
        _LOGGER.info("Macro engine initialized")

    @classmethod
    def from_config(cls, conf: Dict, sink=None, rng: Optional[random.Random] = None) -> "MacroEngine":
        """
        Build an engine from a validated configuration section.

        Args:
            conf: Output of config.validate_config / load_config
            sink: Job notification sink
            rng: Random source
        """
        db = DatabaseConnector(conf["db_url"])

        cache_conf = conf["cache"]
        if cache_conf["backend"] == CACHE_BACKEND_MEMORY:
            backend = MemoryCacheBackend()
        elif cache_conf["backend"] == CACHE_BACKEND_SQL:
            backend = SqlCacheBackend(db)
        else:
            backend = None

        return cls(
            db,
            MacroFileStore(conf["storage_dir"]),
            cache=ContentCache(backend, default_ttl=cache_conf["ttl"]),
            scheduler=JobScheduler(conf["queues"], sink=sink),
            rng=rng,
            min_length=conf["mining"]["min_length"],
            min_frequency=conf["mining"]["min_frequency"],
        )

    def initialize(self):
        """Create tables and seed the built-in profiles."""
        self.pattern_storage.initialize_schema()
        self.profile_storage.initialize_schema()
        if isinstance(self.cache.backend, SqlCacheBackend):
            self.cache.backend.initialize_schema()
        self.profile_storage.create_default_profiles()

    async def start(self):
        await self.scheduler.start()

    async def close(self):
        await self.scheduler.close()
        self.db.dispose()

    # ========================================================================
    # Parsing
    # ========================================================================

    def parse_content(self, content) -> Tuple[List[Command], str]:
        """
        Parse macro bytes, using the cache keyed by content hash.

        Returns:
            (commands, content hash)

        Raises:
            ParseError: Malformed content (nothing is cached)
        """
        file_hash = content_hash(content)
        cached = self.cache.get_cached_commands(file_hash)
        if cached.is_hit:
            _LOGGER.debug(f"Parsed commands for {file_hash[:12]} served from cache")
            return cached.value, file_hash

        commands = self.codec.parse(content)
        self.cache.cache_commands(file_hash, commands)
        return commands, file_hash

    def load_commands(self, file_id: str) -> Tuple[List[Command], str]:
        """Load and parse a stored macro file."""
        return self.parse_content(self.file_store.load(file_id))

    def _load_sequences(self, file_ids: List[str]) -> Tuple[List[LabeledSequence], List[str]]:
        """Load every readable file, skipping the ones that fail."""
        sequences = []
        hashes = []

        for file_id in file_ids:
            try:
                commands, file_hash = self.load_commands(file_id)
            except (NotFoundError, ParseError, ValidationError, OSError) as e:
                _LOGGER.warning(f"Skipping macro file {file_id}: {e}")
                continue
            sequences.append(LabeledSequence(file_id, commands))
            hashes.append(file_hash)

        return sequences, hashes

    # ========================================================================
    # Pattern Mining
    # ========================================================================

    def mine_patterns(
        self,
        file_ids: List[str],
        min_length: Optional[int] = None,
        min_frequency: Optional[int] = None,
        store: bool = True,
    ) -> List[Pattern]:
        """
        Mine recurring patterns across macro files.

        Unreadable files are skipped. When fewer than two usable recordings
        remain the result is empty.

        Args:
            file_ids: At least two macro file ids
            min_length: Shortest window (default from configuration)
            min_frequency: Minimum occurrences (default from configuration)
            store: Persist newly mined patterns

        Returns:
            Ranked patterns

        Raises:
            ValidationError: Fewer than two files or bad thresholds
        """
        patterns, _ = self.mine_patterns_with_stats(file_ids, min_length, min_frequency, store)
        return patterns

    def mine_patterns_with_stats(
        self,
        file_ids: List[str],
        min_length: Optional[int] = None,
        min_frequency: Optional[int] = None,
        store: bool = True,
    ) -> Tuple[List[Pattern], MiningStats]:
        if len(file_ids) < 2:
            raise ValidationError(f"At least 2 files are required for pattern mining, got {len(file_ids)}")

        min_length = self.min_length if min_length is None else min_length
        min_frequency = self.min_frequency if min_frequency is None else min_frequency
        if min_length < 1 or min_frequency < 1:
            raise ValidationError("min_length and min_frequency must be at least 1")

        _LOGGER.info(f"Starting pattern mining over {len(file_ids)} files")
        start_time = datetime.now()

        sequences, hashes = self._load_sequences(file_ids)
        patterns: List[Pattern] = []
        stored = 0
        cache_hit = False

        if len(sequences) < 2:
            _LOGGER.warning(f"Only {len(sequences)} usable recordings, no patterns mined")
        else:
            cached = self._cached_patterns(hashes, min_length, min_frequency)
            if cached is not None:
                patterns = cached
                cache_hit = True
            else:
                patterns = self.miner.mine(sequences, min_length, min_frequency)
                if store:
                    patterns = self.pattern_storage.store_patterns(patterns)
                    stored = len(patterns)
                    self.cache.cache_pattern_analysis(hashes, {
                        "min_length": min_length,
                        "min_frequency": min_frequency,
                        "patterns": [p.to_dict() for p in patterns],
                    })

        stats = MiningStats(
            files_requested=len(file_ids),
            files_loaded=len(sequences),
            files_skipped=len(file_ids) - len(sequences),
            patterns_discovered=len(patterns),
            patterns_stored=stored,
            cache_hit=cache_hit,
            duration_seconds=(datetime.now() - start_time).total_seconds(),
        )
        _LOGGER.info(f"Pattern mining complete: {stats.to_dict()}")
        return patterns, stats

    def _cached_patterns(self, hashes: List[str], min_length: int, min_frequency: int) -> Optional[List[Pattern]]:
        cached = self.cache.get_cached_pattern_analysis(hashes)
        if not cached.is_hit:
            return None

        analysis = cached.value
        if not isinstance(analysis, dict):
            return None
        if analysis.get("min_length") != min_length or analysis.get("min_frequency") != min_frequency:
            return None

        try:
            patterns = [Pattern.from_dict(p) for p in analysis.get("patterns", [])]
        except (KeyError, TypeError, ValueError) as e:
            _LOGGER.debug(f"Ignoring malformed cached pattern analysis: {e}")
            return None

        # Only stored patterns are cached; they must all still exist
        stored_ids = {p.pattern_id for p in self.pattern_storage.get_all_patterns()}
        if any(p.pattern_id not in stored_ids for p in patterns):
            return None

        _LOGGER.debug("Pattern analysis served from cache")
        return patterns

    def delete_pattern(self, pattern_id: int):
        """Delete a stored pattern and forget cached mining results."""
        self.pattern_storage.delete_pattern(pattern_id)
        self.cache.invalidate_pattern_analysis()

    def clear_patterns(self):
        self.pattern_storage.clear_all_patterns()
        self.cache.invalidate_pattern_analysis()

    def find_similar_patterns(
        self,
        commands: List[Command],
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> List[Pattern]:
        """Stored patterns whose positional similarity is at least the threshold."""
        if not 0 <= threshold <= 1:
            raise ValidationError(f"threshold must be within [0, 1], got {threshold}")
        return self.miner.find_similar(commands, self.pattern_storage.get_all_patterns(), threshold)

    def record_pattern_usage(self, pattern_id: int, file_id: str, success: bool = True) -> Dict:
        """
        Record a pattern application in storage and in the cache counter.

        The cache counter is best-effort; the stored usage row is authoritative.
        """
        usage = self.pattern_storage.record_usage(pattern_id, file_id, success)
        usage["cached_usage_count"] = self.cache.increment_pattern_usage(pattern_id)
        return usage

    def export_patterns(self, min_confidence: float = 0.0) -> str:
        """Write stored patterns to the review export file."""
        return self.file_store.export_patterns(self.pattern_storage.get_all_patterns(), min_confidence)

    # ========================================================================
    # Transitions
    # ========================================================================

    def analyze_transitions(self, file_ids: List[str]) -> TransitionTable:
        """Transition table over the given files; unreadable files are skipped."""
        sequences, _ = self._load_sequences(file_ids)
        return self.transitions.build(seq.commands for seq in sequences)

    def predict_next(self, history: List[Command], table: TransitionTable) -> Optional[Command]:
        return self.transitions.predict_next(history, table)

    def transition_matrix(self, table: TransitionTable) -> pd.DataFrame:
        return self.transitions.to_frame(table)

    # ========================================================================
    # Humanization
    # ========================================================================

    def resolve_settings(self, settings=None, profile_id: Optional[int] = None) -> HumanizationSettings:
        """
        Pick the settings for a humanization run.

        Precedence: explicit profile, explicit settings, default profile,
        built-in defaults.
        """
        if profile_id is not None:
            return self.profile_storage.resolve_settings(profile_id)
        if isinstance(settings, HumanizationSettings):
            return settings
        if settings is not None:
            return HumanizationSettings.from_dict(settings)

        default = self.profile_storage.get_default_profile()
        if default is not None:
            return default.resolved_settings()
        return HumanizationSettings()

    def humanize(
        self,
        commands: List[Command],
        settings=None,
        profile_id: Optional[int] = None,
    ) -> List[Command]:
        """Humanize a command sequence."""
        return self.humanizer.humanize(commands, self.resolve_settings(settings, profile_id))

    def humanize_file(
        self,
        file_id: str,
        settings=None,
        profile_id: Optional[int] = None,
        save: bool = False,
    ) -> HumanizationResult:
        """
        Humanize a stored macro file.

        Args:
            file_id: Source file
            settings: Settings dict or HumanizationSettings
            profile_id: Profile to use instead of settings
            save: Write the result back to the file store

        Returns:
            HumanizationResult
        """
        resolved = self.resolve_settings(settings, profile_id)
        commands, _ = self.load_commands(file_id)
        humanized, stats = self.humanizer.humanize_with_stats(commands, resolved)

        result = HumanizationResult(
            source_file_id=file_id,
            commands=humanized,
            stats=stats,
            settings=resolved.to_dict(),
        )
        if save:
            result.output_file_id = self.file_store.save(humanized)

        _LOGGER.info(f"Humanized {file_id}: {stats.input_commands} -> {stats.output_commands} commands")
        return result

    # ========================================================================
    # UI Elements
    # ========================================================================

    def generate_from_ui_elements(self, image_id: str, elements: List[Dict]) -> List[Command]:
        """
        Build a macro from detected UI elements and cache the analysis.

        Raises:
            ValidationError: Malformed element
        """
        parsed = [UIElement.from_dict(element) for element in elements]
        commands = self.ui_generator.generate(parsed)

        self.cache.cache_image_analysis(image_id, {
            "elements": [element.to_dict() for element in parsed],
            "commands": commands_to_dicts(commands),
        })
        return commands

    def get_image_analysis(self, image_id: str) -> CacheResult:
        return self.cache.get_cached_image_analysis(image_id)

    # ========================================================================
    # Cache
    # ========================================================================

    def invalidate_file(self, file_id: str) -> int:
        """Drop every cache entry derived from a file's current content."""
        return self.cache.invalidate_file(content_hash(self.file_store.load(file_id)))

    def clear_cache(self) -> bool:
        return self.cache.clear_all()

    # ========================================================================
    # Jobs
    # ========================================================================

    def enqueue(self, queue_name: str, payload, **options) -> str:
        """Queue work; see JobScheduler.enqueue for the options."""
        return self.scheduler.enqueue(queue_name, payload, **options)

    def get_job_status(self, job_id: str) -> Dict:
        return self.scheduler.get_job_status(job_id)

    def _register_job_handlers(self):
        self.scheduler.register_handler(QUEUE_PROCESSING, self._process_file_job)
        self.scheduler.register_handler(QUEUE_IMAGE_ANALYSIS, self._image_analysis_job)
        self.scheduler.register_handler(QUEUE_PATTERN_MINING, self._pattern_mining_job)

    def _process_file_job(self, context: JobContext) -> Dict:
        payload = _validate_payload(PROCESSING_PAYLOAD, context.payload)
        context.report_progress(10)

        result = self.humanize_file(
            payload["fileId"],
            settings=payload.get("settings"),
            profile_id=payload.get("profileId"),
            save=payload["save"],
        )
        context.report_progress(90)
        return result.to_dict()

    def _image_analysis_job(self, context: JobContext) -> Dict:
        payload = _validate_payload(IMAGE_PAYLOAD, context.payload)
        commands = self.generate_from_ui_elements(payload["imageId"], payload["elements"])
        return {"imageId": payload["imageId"], "commandCount": len(commands)}

    def _pattern_mining_job(self, context: JobContext) -> Dict:
        payload = _validate_payload(MINING_PAYLOAD, context.payload)
        context.report_progress(10)

        patterns, stats = self.mine_patterns_with_stats(
            payload["fileIds"],
            min_length=payload.get("minLength"),
            min_frequency=payload.get("minFrequency"),
        )
        return {
            "patternIds": [p.pattern_id for p in patterns],
            "stats": stats.to_dict(),
        }
