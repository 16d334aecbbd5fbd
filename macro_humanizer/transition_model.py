"""
Command transition analysis for the macro humanizer.

Builds a first-order Markov chain over command states, e.g.:
- keyboard:Ctrl -> keyboard:c (copy)
- mouse:LeftButtonDown -> mouse:LeftButtonUp (click)

A state is `type:key-or-action`. Counts are only taken between neighbours
inside one recording, never across the boundary between two recordings.
"""

import logging
from typing import List, Dict, Optional, Iterable

import pandas as pd

from .command_model import Command
from .const import COMMAND_KEYBOARD, KEY_DOWN_ACTION

_LOGGER = logging.getLogger(__name__)

# from-state -> (to-state -> count), both levels insertion-ordered
TransitionTable = Dict[str, Dict[str, int]]


class TransitionModel:
    """Builds transition tables and predicts the next command."""

    # ========================================================================
    # Table Construction
    # ========================================================================

    def build(self, sequences: Iterable[List[Command]]) -> TransitionTable:
        """
        Count adjacent state pairs.

        Args:
            sequences: One or more command sequences

        Returns:
            Transition table
        """
        table: TransitionTable = {}
        sequence_count = 0

        for commands in sequences:
            sequence_count += 1
            for current, following in zip(commands, commands[1:]):
                successors = table.setdefault(current.state_key, {})
                successors[following.state_key] = successors.get(following.state_key, 0) + 1

        _LOGGER.info(f"Built transition table with {len(table)} states from {sequence_count} sequences")
        return table

    # ========================================================================
    # Prediction
    # ========================================================================

    def predict_next_state(self, history: List[Command], table: TransitionTable) -> Optional[str]:
        """
        Most frequent successor of the last command in the history.

        Ties go to the successor that was observed first.
        """
        if not history:
            return None

        successors = table.get(history[-1].state_key)
        if not successors:
            return None

        best_state = None
        best_count = 0
        for state, count in successors.items():
            if count > best_count:
                best_state = state
                best_count = count
        return best_state

    def predict_next(self, history: List[Command], table: TransitionTable) -> Optional[Command]:
        """
        Predict the next command.

        Args:
            history: Commands executed so far
            table: Transition table from build()

        Returns:
            The predicted command, or None if nothing follows the last command
        """
        state = self.predict_next_state(history, table)
        if state is None:
            return None
        return self.state_to_command(state)

    @staticmethod
    def state_to_command(state: str) -> Command:
        """Turn a state key back into a representative command."""
        command_type, _, key_or_action = state.partition(":")
        if command_type == COMMAND_KEYBOARD:
            return Command(type=command_type, action=KEY_DOWN_ACTION, key=key_or_action)
        return Command(type=command_type, action=key_or_action)

    # ========================================================================
    # Statistics
    # ========================================================================

    @staticmethod
    def probabilities(table: TransitionTable, state: str) -> Dict[str, float]:
        """Normalized outgoing distribution of a state."""
        successors = table.get(state) or {}
        total = sum(successors.values())
        if total == 0:
            return {}
        return {next_state: count / total for next_state, count in successors.items()}

    @staticmethod
    def to_frame(table: TransitionTable) -> pd.DataFrame:
        """Transition counts as a from-state x to-state matrix."""
        frame = pd.DataFrame.from_dict(table, orient="index").fillna(0).astype(int)
        frame.index.name = "from_state"
        frame.columns.name = "to_state"
        return frame
