"""
File storage and export for the macro humanizer.
Reads and writes macro files and review exports in one directory.
"""

import json
import os
from datetime import datetime
from typing import List, Dict, Iterable, Optional
import logging

import pandas as pd

from .command_model import Command, MacroCodec
from .const import DEFAULT_STORAGE_DIR, PATTERN_EXPORT_FILE
from .errors import NotFoundError, ValidationError
from .pattern_miner import Pattern

_LOGGER = logging.getLogger(__name__)

MACRO_EXTENSION = ".mcr"


class MacroFileStore:
    """
    Directory-backed macro store. A file id is the file name.

    Args:
        storage_dir: Directory holding macro files and exports
        codec: Macro line codec used when saving commands
    """

    def __init__(self, storage_dir: str = DEFAULT_STORAGE_DIR, codec: Optional[MacroCodec] = None):
        self.storage_dir = storage_dir
        self.codec = codec or MacroCodec()
        os.makedirs(storage_dir, exist_ok=True)

    def load(self, file_id: str) -> bytes:
        """
        Raw bytes of a stored macro.

        Raises:
            NotFoundError: No such file
        """
        filepath = self._path_for(file_id)
        if not os.path.isfile(filepath):
            raise NotFoundError("macro file", file_id)

        with open(filepath, "rb") as f:
            return f.read()

    def list_files(self) -> List[str]:
        """Ids of stored macro files, sorted by name."""
        return sorted(
            name for name in os.listdir(self.storage_dir)
            if name.lower().endswith(MACRO_EXTENSION)
            and os.path.isfile(os.path.join(self.storage_dir, name))
        )

    def save(self, commands: List[Command], filename: str = None) -> str:
        """
        Serialize and write a command sequence.

        Args:
            commands: Sequence to write
            filename: Target name (default: auto-generated with timestamp)

        Returns: The new file id
        """
        if filename is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            filename = f"humanized_{timestamp}{MACRO_EXTENSION}"

        filepath = self._path_for(filename)
        with open(filepath, "wb") as f:
            f.write(self.codec.serialize(commands))

        _LOGGER.info(f"Saved {len(commands)} commands to {filepath}")
        return filename

    def _path_for(self, file_id: str) -> str:
        if not file_id or os.path.basename(file_id) != file_id or file_id in (".", ".."):
            raise ValidationError(f"Invalid macro file id: {file_id!r}")
        return os.path.join(self.storage_dir, file_id)

    # ========================================================================
    # Exports
    # ========================================================================

    def export_patterns(
        self,
        patterns: Iterable[Pattern],
        min_confidence: float = 0.0,
        filename: str = PATTERN_EXPORT_FILE,
    ) -> str:
        """
        Export patterns for human review.

        Args:
            patterns: Stored patterns
            min_confidence: Only export patterns at or above this confidence
            filename: Output filename

        Returns: Path to exported file
        """
        selected = [p for p in patterns if p.confidence >= min_confidence]
        export = {
            "export_timestamp": datetime.now().isoformat(),
            "pattern_count": len(selected),
            "min_confidence": min_confidence,
            "patterns": [self._clean_for_json(p.to_dict()) for p in selected],
        }

        filepath = os.path.join(self.storage_dir, filename)
        with open(filepath, "w") as f:
            json.dump(export, f, indent=2)

        _LOGGER.info(f"Exported {len(selected)} patterns to {filepath}")
        return filepath

    def export_transitions(self, frame: pd.DataFrame, filename: str = None) -> str:
        """
        Export a transition count matrix as CSV.

        Returns: Path to exported file
        """
        if filename is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            filename = f"transitions_{timestamp}.csv"

        filepath = os.path.join(self.storage_dir, filename)
        frame.to_csv(filepath)

        _LOGGER.info(f"Exported {len(frame)} transition states to {filepath}")
        return filepath

    def _clean_for_json(self, obj):
        """Convert non-JSON-serializable types."""
        if isinstance(obj, dict):
            return {k: self._clean_for_json(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._clean_for_json(v) for v in obj]
        elif isinstance(obj, datetime):
            return obj.isoformat()
        elif isinstance(obj, (int, float, str, bool, type(None))):
            return obj
        else:
            return str(obj)
