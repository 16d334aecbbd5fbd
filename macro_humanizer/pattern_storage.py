"""
Pattern storage layer for the macro humanizer.

Handles all database operations for pattern persistence.
Supports SQLite and server databases via the shared DatabaseConnector.
"""

import json
import logging
from datetime import datetime
from typing import List, Dict, Optional, Iterable

from sqlalchemy import text

from .command_model import commands_to_dicts, commands_from_dicts
from .const import TABLE_PATTERNS, TABLE_PATTERN_USAGE
from .database import DatabaseConnector
from .errors import NotFoundError, ValidationError
from .pattern_miner import Pattern, PatternMetadata

_LOGGER = logging.getLogger(__name__)


# ============================================================================
# SQL Query Templates
# ============================================================================

class QueryTemplates:
    """Centralized SQL query templates."""

    @staticmethod
    def create_patterns_table(is_sqlite: bool) -> str:
        autoincrement = "AUTOINCREMENT" if is_sqlite else "AUTO_INCREMENT"

        return f"""
            CREATE TABLE IF NOT EXISTS {TABLE_PATTERNS} (
                pattern_id INTEGER PRIMARY KEY {autoincrement},
                name TEXT,
                command_sequence TEXT NOT NULL,
                frequency INTEGER NOT NULL,
                confidence REAL NOT NULL,
                source_file_ids TEXT NOT NULL,
                metadata TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """

    @staticmethod
    def create_usage_table(is_sqlite: bool) -> str:
        autoincrement = "AUTOINCREMENT" if is_sqlite else "AUTO_INCREMENT"

        return f"""
            CREATE TABLE IF NOT EXISTS {TABLE_PATTERN_USAGE} (
                usage_id INTEGER PRIMARY KEY {autoincrement},
                pattern_id INTEGER NOT NULL,
                file_id TEXT NOT NULL,
                usage_count INTEGER NOT NULL DEFAULT 1,
                success_rate REAL,
                used_at REAL NOT NULL
            )
        """


PATTERN_COLUMNS = (
    "pattern_id, name, command_sequence, frequency, confidence, "
    "source_file_ids, metadata, version, created_at, updated_at"
)

# Fields that may be edited through update_pattern, keyed by their API name
EDITABLE_FIELDS = {
    "name": "name",
    "commandSequence": "command_sequence",
    "frequency": "frequency",
    "confidence": "confidence",
    "sourceFileIds": "source_file_ids",
    "metadata": "metadata",
}


# ============================================================================
# Main Storage Class
# ============================================================================

class PatternStorage:
    """
    Database storage for mined patterns.

    Thread Safety:
        This class is designed to be called from executor threads.
        All methods are synchronous and open their own connection.

    Args:
        db: DatabaseConnector shared with the other storage classes
    """

    def __init__(self, db: DatabaseConnector):
        self.db = db
        _LOGGER.info(f"Pattern storage using {self.db.db_url}")

    # ========================================================================
    # Schema Management
    # ========================================================================

    def initialize_schema(self):
        """
        Create pattern tables if they don't exist.

        Idempotent: Safe to call multiple times.
        """
        with self.db.get_connection() as conn:
            conn.execute(text(QueryTemplates.create_patterns_table(self.db.is_sqlite)))
            conn.execute(text(QueryTemplates.create_usage_table(self.db.is_sqlite)))
            self._create_indexes(conn)
            conn.commit()

        _LOGGER.info("Pattern storage schema initialized")

    def _create_indexes(self, conn):
        """Create indexes for query performance."""
        indexes = [
            f"CREATE INDEX IF NOT EXISTS idx_mh_patterns_confidence ON {TABLE_PATTERNS}(confidence DESC, frequency DESC)",
            f"CREATE INDEX IF NOT EXISTS idx_mh_usage_pattern ON {TABLE_PATTERN_USAGE}(pattern_id)",
        ]

        for idx in indexes:
            conn.execute(text(idx))

    # ========================================================================
    # Pattern Operations
    # ========================================================================

    def store_pattern(self, pattern: Pattern) -> Pattern:
        """
        Persist a freshly mined pattern.

        Args:
            pattern: Pattern without an id

        Returns:
            The pattern with id, version and timestamps filled in
        """
        now = datetime.now().timestamp()

        with self.db.get_connection() as conn:
            result = conn.execute(text(f"""
                INSERT INTO {TABLE_PATTERNS} (
                    name, command_sequence, frequency, confidence,
                    source_file_ids, metadata, version, created_at, updated_at
                ) VALUES (
                    :name, :sequence, :frequency, :confidence,
                    :sources, :metadata, 1, :created_at, :updated_at
                )
            """), {
                "name": pattern.name,
                "sequence": json.dumps(commands_to_dicts(pattern.command_sequence)),
                "frequency": pattern.frequency,
                "confidence": pattern.confidence,
                "sources": json.dumps(list(pattern.source_file_ids)),
                "metadata": json.dumps(pattern.metadata.to_dict()),
                "created_at": now,
                "updated_at": now,
            })
            conn.commit()

        pattern.pattern_id = result.lastrowid
        pattern.version = 1
        pattern.created_at = now
        pattern.updated_at = now

        _LOGGER.debug(f"Stored pattern {pattern.pattern_id} ({pattern.name}, frequency {pattern.frequency})")
        return pattern

    def store_patterns(self, patterns: Iterable[Pattern]) -> List[Pattern]:
        """Store patterns in ranked order."""
        stored = [self.store_pattern(pattern) for pattern in patterns]
        _LOGGER.info(f"Stored {len(stored)} patterns")
        return stored

    def get_pattern(self, pattern_id: int) -> Pattern:
        """
        Fetch a pattern by id.

        Raises:
            NotFoundError: Unknown pattern id
        """
        with self.db.get_connection() as conn:
            row = conn.execute(
                text(f"SELECT {PATTERN_COLUMNS} FROM {TABLE_PATTERNS} WHERE pattern_id = :id"),
                {"id": pattern_id},
            ).fetchone()

        if row is None:
            raise NotFoundError("pattern", pattern_id)
        return self._row_to_pattern(row)

    def get_all_patterns(self) -> List[Pattern]:
        with self.db.get_connection() as conn:
            result = conn.execute(
                text(f"SELECT {PATTERN_COLUMNS} FROM {TABLE_PATTERNS} ORDER BY pattern_id")
            )
            return [self._row_to_pattern(row) for row in result]

    def get_top_patterns(self, limit: int = 20) -> List[Pattern]:
        """Highest confidence first, then highest frequency."""
        with self.db.get_connection() as conn:
            result = conn.execute(text(f"""
                SELECT {PATTERN_COLUMNS} FROM {TABLE_PATTERNS}
                ORDER BY confidence DESC, frequency DESC, pattern_id
                LIMIT :limit
            """), {"limit": limit})
            return [self._row_to_pattern(row) for row in result]

    def get_patterns_by_source_ids(self, file_ids: Iterable[str]) -> List[Pattern]:
        """Patterns mined from at least one of the given files."""
        wanted = set(file_ids)
        return [
            pattern for pattern in self.get_all_patterns()
            if wanted.intersection(pattern.source_file_ids)
        ]

    def update_pattern(self, pattern_id: int, updates: Dict) -> Pattern:
        """
        Edit a pattern and bump its version.

        Concurrent updates are last-writer-wins; there is no conflict check.

        Args:
            pattern_id: Pattern to edit
            updates: API field names (name, commandSequence, frequency,
                confidence, sourceFileIds, metadata) to new values

        Returns:
            The updated pattern
        """
        unknown = set(updates) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update pattern fields: {', '.join(sorted(unknown))}")

        if "confidence" in updates and not 0.0 <= updates["confidence"] <= 1.0:
            raise ValidationError("confidence must be between 0 and 1")

        assignments = []
        params = {"id": pattern_id, "updated_at": datetime.now().timestamp()}
        for api_name, value in updates.items():
            column = EDITABLE_FIELDS[api_name]
            assignments.append(f"{column} = :{column}")
            params[column] = self._encode_field(api_name, value)

        assignments.append("version = version + 1")
        assignments.append("updated_at = :updated_at")

        with self.db.get_connection() as conn:
            result = conn.execute(text(f"""
                UPDATE {TABLE_PATTERNS}
                SET {', '.join(assignments)}
                WHERE pattern_id = :id
            """), params)
            conn.commit()

        if result.rowcount == 0:
            raise NotFoundError("pattern", pattern_id)

        _LOGGER.info(f"Updated pattern {pattern_id}")
        return self.get_pattern(pattern_id)

    def _encode_field(self, api_name: str, value):
        if api_name == "commandSequence":
            return json.dumps([
                cmd if isinstance(cmd, dict) else cmd.to_dict() for cmd in value
            ])
        if api_name == "sourceFileIds":
            return json.dumps(list(value))
        if api_name == "metadata":
            if isinstance(value, PatternMetadata):
                value = value.to_dict()
            return json.dumps(value)
        return value

    def delete_pattern(self, pattern_id: int):
        """Delete a pattern and its usage records."""
        with self.db.get_connection() as conn:
            conn.execute(
                text(f"DELETE FROM {TABLE_PATTERN_USAGE} WHERE pattern_id = :id"),
                {"id": pattern_id},
            )
            result = conn.execute(
                text(f"DELETE FROM {TABLE_PATTERNS} WHERE pattern_id = :id"),
                {"id": pattern_id},
            )
            conn.commit()

        if result.rowcount == 0:
            raise NotFoundError("pattern", pattern_id)
        _LOGGER.info(f"Deleted pattern {pattern_id}")

    def _row_to_pattern(self, row) -> Pattern:
        """Convert database row to Pattern."""
        return Pattern(
            pattern_id=row[0],
            name=row[1],
            command_sequence=commands_from_dicts(json.loads(row[2])),
            frequency=row[3],
            confidence=row[4],
            source_file_ids=json.loads(row[5]),
            metadata=PatternMetadata.from_dict(json.loads(row[6])),
            version=row[7],
            created_at=row[8],
            updated_at=row[9],
        )

    # ========================================================================
    # Usage Tracking
    # ========================================================================

    def record_usage(self, pattern_id: int, file_id: str, success: bool) -> Dict:
        """
        Record that a pattern was applied to a file.

        Keeps one usage row per pattern with a running success rate and
        mirrors the totals into the pattern metadata.

        Returns:
            Dictionary with usage_count and success_rate
        """
        pattern = self.get_pattern(pattern_id)
        now = datetime.now().timestamp()

        with self.db.get_connection() as conn:
            existing = conn.execute(text(f"""
                SELECT usage_id, usage_count, success_rate
                FROM {TABLE_PATTERN_USAGE}
                WHERE pattern_id = :id
            """), {"id": pattern_id}).fetchone()

            if existing:
                usage_id, old_count, old_rate = existing
                usage_count = (old_count or 0) + 1
                current = 1.0 if old_rate is None else old_rate
                success_rate = (current * (usage_count - 1) + (1 if success else 0)) / usage_count

                conn.execute(text(f"""
                    UPDATE {TABLE_PATTERN_USAGE}
                    SET usage_count = :count,
                        success_rate = :rate,
                        file_id = :file_id,
                        used_at = :used_at
                    WHERE usage_id = :usage_id
                """), {
                    "count": usage_count,
                    "rate": success_rate,
                    "file_id": file_id,
                    "used_at": now,
                    "usage_id": usage_id,
                })
            else:
                usage_count = 1
                success_rate = 1.0 if success else 0.0

                conn.execute(text(f"""
                    INSERT INTO {TABLE_PATTERN_USAGE} (
                        pattern_id, file_id, usage_count, success_rate, used_at
                    ) VALUES (:id, :file_id, 1, :rate, :used_at)
                """), {
                    "id": pattern_id,
                    "file_id": file_id,
                    "rate": success_rate,
                    "used_at": now,
                })

            metadata = pattern.metadata
            metadata.times_used = usage_count
            metadata.success_rate = success_rate
            conn.execute(text(f"""
                UPDATE {TABLE_PATTERNS}
                SET metadata = :metadata,
                    version = version + 1,
                    updated_at = :updated_at
                WHERE pattern_id = :id
            """), {
                "metadata": json.dumps(metadata.to_dict()),
                "updated_at": now,
                "id": pattern_id,
            })
            conn.commit()

        _LOGGER.debug(f"Pattern {pattern_id} used {usage_count} times (success rate {success_rate:.2f})")
        return {"usage_count": usage_count, "success_rate": success_rate}

    # ========================================================================
    # Statistics and Utilities
    # ========================================================================

    def get_statistics(self) -> Dict:
        """Get pattern database statistics."""
        with self.db.get_connection() as conn:
            row = conn.execute(text(f"""
                SELECT COUNT(*), AVG(confidence), AVG(frequency)
                FROM {TABLE_PATTERNS}
            """)).fetchone()
            usage = conn.execute(
                text(f"SELECT COALESCE(SUM(usage_count), 0) FROM {TABLE_PATTERN_USAGE}")
            ).scalar()

        return {
            "total_patterns": row[0],
            "avg_confidence": round(row[1], 3) if row[1] is not None else 0,
            "avg_frequency": round(row[2], 3) if row[2] is not None else 0,
            "total_usage": usage,
        }

    def clear_all_patterns(self):
        """Clear all pattern data. Use with caution."""
        with self.db.get_connection() as conn:
            conn.execute(text(f"DELETE FROM {TABLE_PATTERN_USAGE}"))
            conn.execute(text(f"DELETE FROM {TABLE_PATTERNS}"))
            conn.commit()

        _LOGGER.warning("All pattern data cleared")
