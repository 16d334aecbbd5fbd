"""
Frequent-subsequence mining for macro recordings.

Discovers command routines that recur across several recordings, e.g.:
- Login: click user field -> type name -> Tab -> type password -> Enter
- Save-as: Ctrl down -> Shift down -> S down -> releases

Every contiguous window of every recording is a candidate. Windows are
grouped by their canonical key (type:action:key per command), so the same
routine recorded with different timing or cursor positions counts as one
pattern.
"""

import logging
from typing import List, Dict, Tuple, Optional
from dataclasses import dataclass, field

import pandas as pd

from .command_model import Command, sequence_key, commands_to_dicts, commands_from_dicts
from .const import (
    COMMAND_DELAY,
    COMMAND_KEYBOARD,
    DEFAULT_MIN_SEQUENCE_LENGTH,
    DEFAULT_MIN_FREQUENCY,
    DEFAULT_SIMILARITY_THRESHOLD,
    MAX_WINDOW_LENGTH,
    MAX_PATTERNS,
    PATTERN_NAME_MAX_KEYS,
)

_LOGGER = logging.getLogger(__name__)


# ============================================================================
# Configuration and Thresholds
# ============================================================================

class MinerConfig:
    """Configuration for pattern mining."""

    # Window constraints
    MAX_WINDOW_LENGTH = MAX_WINDOW_LENGTH
    MAX_PATTERNS = MAX_PATTERNS

    # Confidence: frequency relative to twice the number of recordings
    CONFIDENCE_SOURCE_FACTOR = 2

    # Initial usage metadata
    INITIAL_SUCCESS_RATE = 1.0


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class LabeledSequence:
    """A command sequence tagged with the id of the recording it came from."""
    source_id: str
    commands: List[Command]


@dataclass
class PatternMetadata:
    """Timing and usage statistics for a pattern."""
    average_duration: float = 0.0
    variation_std_dev: float = 0.0
    times_used: int = 0
    success_rate: float = MinerConfig.INITIAL_SUCCESS_RATE

    def to_dict(self) -> Dict:
        return {
            "averageDuration": self.average_duration,
            "variationStdDev": self.variation_std_dev,
            "timesUsed": self.times_used,
            "successRate": self.success_rate,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "PatternMetadata":
        data = data or {}
        return cls(
            average_duration=data.get("averageDuration", 0.0),
            variation_std_dev=data.get("variationStdDev", 0.0),
            times_used=data.get("timesUsed", 0),
            success_rate=data.get("successRate", MinerConfig.INITIAL_SUCCESS_RATE),
        )


@dataclass
class Pattern:
    """
    A recurring command subsequence.

    `pattern_id`, `version` and the timestamps are filled in by storage;
    freshly mined patterns carry None / 1.
    """
    name: Optional[str]
    command_sequence: List[Command]
    frequency: int
    confidence: float
    source_file_ids: List[str] = field(default_factory=list)
    metadata: PatternMetadata = field(default_factory=PatternMetadata)
    pattern_id: Optional[int] = None
    version: int = 1
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for API responses and caching."""
        return {
            "id": self.pattern_id,
            "name": self.name,
            "commandSequence": commands_to_dicts(self.command_sequence),
            "frequency": self.frequency,
            "confidence": self.confidence,
            "sourceFileIds": list(self.source_file_ids),
            "metadata": self.metadata.to_dict(),
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Pattern":
        return cls(
            name=data.get("name"),
            command_sequence=commands_from_dicts(data["commandSequence"]),
            frequency=data["frequency"],
            confidence=data["confidence"],
            source_file_ids=list(data.get("sourceFileIds") or []),
            metadata=PatternMetadata.from_dict(data.get("metadata")),
            pattern_id=data.get("id"),
            version=data.get("version", 1),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class CandidateGroup:
    """All occurrences of one canonical window."""
    sequence: List[Command]
    frequency: int = 0
    occurrences: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def source_ids(self) -> List[str]:
        """Unique source ids in first-seen order."""
        return list(dict.fromkeys(source_id for source_id, _ in self.occurrences))


# ============================================================================
# Pattern Miner
# ============================================================================

class PatternMiner:
    """
    Discovers frequent command subsequences across recordings.

    Args:
        max_window_length: Longest window considered (default 15)
        max_patterns: Number of top patterns kept (default 100)
    """

    def __init__(
        self,
        max_window_length: int = MinerConfig.MAX_WINDOW_LENGTH,
        max_patterns: int = MinerConfig.MAX_PATTERNS,
    ):
        self.max_window_length = max_window_length
        self.max_patterns = max_patterns
        self.config = MinerConfig()

    # ========================================================================
    # Main Mining Pipeline
    # ========================================================================

    def mine(
        self,
        sequences: List[LabeledSequence],
        min_length: int = DEFAULT_MIN_SEQUENCE_LENGTH,
        min_frequency: int = DEFAULT_MIN_FREQUENCY,
    ) -> List[Pattern]:
        """
        Mine frequent subsequences.

        Algorithm:
        1. Enumerate every contiguous window of length min_length..15
        2. Group windows by canonical key
        3. Drop groups seen fewer than min_frequency times
        4. Rank by frequency, keep the top max_patterns
        5. Score confidence and timing statistics

        Args:
            sequences: Recordings labeled with their source ids
            min_length: Shortest window considered
            min_frequency: Minimum occurrences for a pattern

        Returns:
            Ranked list of patterns (not yet stored)
        """
        if len(sequences) < 2:
            _LOGGER.info(f"Need at least 2 sequences to mine, got {len(sequences)}")
            return []

        _LOGGER.info(
            f"Mining patterns from {len(sequences)} sequences "
            f"(min_length={min_length}, min_frequency={min_frequency})"
        )

        groups = self._collect_candidates(sequences, min_length)
        ranked = self._filter_and_rank(groups, min_frequency)
        patterns = [self._group_to_pattern(group, len(sequences)) for group in ranked]

        _LOGGER.info(f"Discovered {len(patterns)} patterns from {len(groups)} candidate groups")
        return patterns

    def _collect_candidates(
        self,
        sequences: List[LabeledSequence],
        min_length: int,
    ) -> Dict[str, CandidateGroup]:
        """Group every candidate window by its canonical key."""
        groups: Dict[str, CandidateGroup] = {}

        for labeled in sequences:
            commands = labeled.commands
            longest = min(len(commands), self.max_window_length)

            for length in range(min_length, longest + 1):
                for offset in range(len(commands) - length + 1):
                    window = commands[offset:offset + length]
                    key = sequence_key(window)

                    group = groups.get(key)
                    if group is None:
                        group = CandidateGroup(sequence=list(window))
                        groups[key] = group

                    group.frequency += 1
                    group.occurrences.append((labeled.source_id, offset))

        return groups

    def _filter_and_rank(
        self,
        groups: Dict[str, CandidateGroup],
        min_frequency: int,
    ) -> List[CandidateGroup]:
        """Keep frequent groups, most frequent first. Ties keep discovery order."""
        frequent = [g for g in groups.values() if g.frequency >= min_frequency]
        frequent.sort(key=lambda g: g.frequency, reverse=True)
        return frequent[:self.max_patterns]

    # ========================================================================
    # Pattern Conversion
    # ========================================================================

    def _group_to_pattern(self, group: CandidateGroup, source_count: int) -> Pattern:
        return Pattern(
            name=self.generate_name(group.sequence),
            command_sequence=list(group.sequence),
            frequency=group.frequency,
            confidence=self.calculate_confidence(group.frequency, source_count),
            source_file_ids=group.source_ids,
            metadata=self.calculate_metadata(group.sequence),
        )

    def calculate_confidence(self, frequency: int, source_count: int) -> float:
        """frequency / (2 * recordings), capped at 1."""
        if source_count <= 0:
            return 0.0
        return min(frequency / (source_count * self.config.CONFIDENCE_SOURCE_FACTOR), 1.0)

    def calculate_metadata(self, sequence: List[Command]) -> PatternMetadata:
        """
        Timing statistics over the delay commands of a window.

        Standard deviation is the population one and is 0 below two samples.
        """
        delays = pd.Series(
            [cmd.delay for cmd in sequence if cmd.type == COMMAND_DELAY and cmd.delay],
            dtype="float64",
        )

        average = float(delays.mean()) if len(delays) > 0 else 0.0
        std_dev = float(delays.std(ddof=0)) if len(delays) > 1 else 0.0

        return PatternMetadata(average_duration=average, variation_std_dev=std_dev)

    def generate_name(self, sequence: List[Command]) -> str:
        keys = [cmd.key for cmd in sequence if cmd.type == COMMAND_KEYBOARD and cmd.key]
        if keys:
            return f"Pattern: {'-'.join(keys)[:PATTERN_NAME_MAX_KEYS]}"
        return f"Pattern: {len(sequence)} commands"

    # ========================================================================
    # Similarity
    # ========================================================================

    @staticmethod
    def similarity(first: List[Command], second: List[Command]) -> float:
        """
        Positional canonical similarity.

        Counts canonical-equal positions up to the shorter length and divides
        by the longer length.
        """
        shorter = min(len(first), len(second))
        if shorter == 0:
            return 0.0

        matches = sum(
            1 for a, b in zip(first, second)
            if a.canonically_equals(b)
        )
        return matches / max(len(first), len(second))

    def find_similar(
        self,
        commands: List[Command],
        patterns: List[Pattern],
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> List[Pattern]:
        """
        Find stored patterns resembling a command sequence.

        Args:
            commands: Sequence to compare
            patterns: Candidate patterns
            threshold: Minimum similarity (inclusive)

        Returns:
            Matching patterns, most similar first
        """
        scored = []
        for pattern in patterns:
            score = self.similarity(commands, pattern.command_sequence)
            if score >= threshold:
                scored.append((score, pattern))

        scored.sort(key=lambda item: item[0], reverse=True)
        _LOGGER.debug(f"{len(scored)} of {len(patterns)} patterns at or above {threshold}")
        return [pattern for _, pattern in scored]
