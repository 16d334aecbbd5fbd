#!/usr/bin/env python3
"""
Command-line runner for the macro humanizer.

Usage:
    macro-humanizer mine                         # Mine every macro in the storage dir
    macro-humanizer mine a.mcr b.mcr --min-length 4
    macro-humanizer transitions --export         # Print and export the transition matrix
    macro-humanizer humanize login.mcr --profile "Expert User" --save
    macro-humanizer profiles                     # List humanization profiles
    macro-humanizer export --min-confidence 0.5  # Write patterns for review
"""

import argparse
import logging
import sys
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .config import load_config
from .engine import MacroEngine
from .errors import MacroHumanizerError

_LOGGER = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mine, analyze and humanize macro recordings")
    parser.add_argument("--config", type=str, default=None, help="YAML configuration file")
    parser.add_argument("--db-url", type=str, default=None, help="Database URL (overrides config)")
    parser.add_argument("--storage-dir", type=str, default=None, help="Macro directory (overrides config)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    mine = subparsers.add_parser("mine", help="Mine recurring command patterns")
    mine.add_argument("files", nargs="*", help="Macro file ids (default: all files)")
    mine.add_argument("--min-length", type=int, default=None, help="Shortest pattern length")
    mine.add_argument("--min-frequency", type=int, default=None, help="Minimum occurrences")

    transitions = subparsers.add_parser("transitions", help="Analyze command transitions")
    transitions.add_argument("files", nargs="*", help="Macro file ids (default: all files)")
    transitions.add_argument("--export", action="store_true", help="Write the matrix as CSV")

    humanize = subparsers.add_parser("humanize", help="Humanize a macro file")
    humanize.add_argument("file", help="Macro file id")
    humanize.add_argument("--profile", type=str, default=None, help="Profile name (default profile if omitted)")
    humanize.add_argument("--seed", type=int, default=None, help="Random seed for reproducible output")
    humanize.add_argument("--save", action="store_true", help="Write the humanized macro to the storage dir")

    subparsers.add_parser("profiles", help="List humanization profiles")

    export = subparsers.add_parser("export", help="Export stored patterns for review")
    export.add_argument("--min-confidence", type=float, default=0.0, help="Minimum confidence (0.0-1.0)")

    return parser


class AnalysisRunner:
    """Runs one CLI command against an engine."""

    def __init__(self, engine: MacroEngine):
        self.engine = engine

    def _file_ids(self, files: List[str]) -> List[str]:
        return files or self.engine.file_store.list_files()

    def mine(self, args) -> int:
        file_ids = self._file_ids(args.files)
        patterns, stats = self.engine.mine_patterns_with_stats(
            file_ids,
            min_length=args.min_length,
            min_frequency=args.min_frequency,
        )

        _LOGGER.info("")
        _LOGGER.info("=== Mining Summary ===")
        _LOGGER.info(f"Files analyzed: {stats.files_loaded} of {stats.files_requested}")
        _LOGGER.info(f"Patterns found: {stats.patterns_discovered}")
        for pattern in patterns[:10]:
            _LOGGER.info(
                f"  {pattern.name}: frequency {pattern.frequency}, "
                f"confidence {pattern.confidence:.2f}, length {len(pattern.command_sequence)}"
            )
        return 0

    def transitions(self, args) -> int:
        table = self.engine.analyze_transitions(self._file_ids(args.files))
        matrix = self.engine.transition_matrix(table)

        _LOGGER.info("")
        _LOGGER.info("=== Transition Summary ===")
        _LOGGER.info(f"States: {len(table)}")
        for state in table:
            following = self.engine.transitions.predict_next_state(
                [self.engine.transitions.state_to_command(state)], table
            )
            _LOGGER.info(f"  {state} -> {following}")

        if args.export:
            path = self.engine.file_store.export_transitions(matrix)
            _LOGGER.info(f"Matrix: {path}")
        return 0

    def humanize(self, args) -> int:
        if args.seed is not None:
            self.engine.rng.seed(args.seed)

        profile_id = None
        if args.profile:
            profile_id = self.engine.profile_storage.get_profile_by_name(args.profile).profile_id

        result = self.engine.humanize_file(args.file, profile_id=profile_id, save=args.save)

        _LOGGER.info("")
        _LOGGER.info("=== Humanization Summary ===")
        for name, value in result.stats.to_dict().items():
            _LOGGER.info(f"{name}: {value}")
        if result.output_file_id:
            _LOGGER.info(f"Output: {result.output_file_id}")
        return 0

    def profiles(self, args) -> int:
        for profile in self.engine.profile_storage.get_all_profiles():
            marker = " (default)" if profile.is_default else ""
            _LOGGER.info(
                f"{profile.profile_id}: {profile.name}{marker} - {profile.typing_speed}, "
                f"{profile.description or ''}"
            )
        return 0

    def export(self, args) -> int:
        path = self.engine.export_patterns(min_confidence=args.min_confidence)
        _LOGGER.info(f"Patterns exported to {path}")
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        conf = load_config(args.config)
        if args.db_url:
            conf["db_url"] = args.db_url
        if args.storage_dir:
            conf["storage_dir"] = args.storage_dir

        engine = MacroEngine.from_config(conf)
        status = engine.db.test_connection()
        _LOGGER.info(f"Connected to {status['database_type']} database")
        engine.initialize()
    except (MacroHumanizerError, OSError, SQLAlchemyError) as e:
        _LOGGER.error(f"Initialization failed: {e}")
        return 1

    runner = AnalysisRunner(engine)
    try:
        return getattr(runner, args.command)(args)
    except MacroHumanizerError as e:
        _LOGGER.error(f"{args.command} failed: {e}")
        return 1
    finally:
        engine.db.dispose()


if __name__ == "__main__":
    sys.exit(main())
