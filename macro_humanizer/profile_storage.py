"""
Humanization profile storage for the macro humanizer.

A profile bundles validated humanization settings with a typing speed and
mouse accuracy under a unique name. At most one profile is the default.
"""

import json
import logging
from datetime import datetime
from dataclasses import dataclass, field
from typing import List, Dict, Optional

import voluptuous as vol
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from .const import TABLE_PROFILES, TYPING_SPEED_MULTIPLIERS
from .database import DatabaseConnector
from .errors import NotFoundError, ValidationError
from .humanizer import HumanizationSettings

_LOGGER = logging.getLogger(__name__)


# ============================================================================
# Validation
# ============================================================================

PROFILE_FIELDS = {
    vol.Optional("description"): vol.Any(None, str),
    vol.Optional("typingSpeed"): vol.In(list(TYPING_SPEED_MULTIPLIERS)),
    vol.Optional("mouseAccuracy"): vol.All(vol.Coerce(float), vol.Range(min=0, max=1)),
    vol.Optional("isDefault"): vol.Boolean(),
    vol.Optional("settings"): dict,
}

PROFILE_CREATE_SCHEMA = vol.Schema({
    vol.Required("name"): vol.All(str, vol.Length(min=1)),
    **PROFILE_FIELDS,
})

PROFILE_UPDATE_SCHEMA = vol.Schema({
    vol.Optional("name"): vol.All(str, vol.Length(min=1)),
    **PROFILE_FIELDS,
})


def _validate(schema: vol.Schema, data: Dict) -> Dict:
    try:
        return schema(dict(data))
    except vol.Invalid as e:
        raise ValidationError(f"Invalid humanization profile: {e}") from e


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class HumanizationProfile:
    """A named humanization profile."""
    name: str
    settings: HumanizationSettings = field(default_factory=HumanizationSettings)
    description: Optional[str] = None
    typing_speed: str = "medium"
    mouse_accuracy: float = 0.8
    is_default: bool = False
    profile_id: Optional[int] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def resolved_settings(self) -> HumanizationSettings:
        """Settings with the typing-speed multiplier applied."""
        return self.settings.adjusted_for_speed(self.typing_speed)

    def to_dict(self) -> Dict:
        return {
            "id": self.profile_id,
            "name": self.name,
            "description": self.description,
            "settings": self.settings.to_dict(),
            "typingSpeed": self.typing_speed,
            "mouseAccuracy": self.mouse_accuracy,
            "isDefault": self.is_default,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


DEFAULT_PROFILES = [
    {
        "name": "Novice User",
        "description": "Simulates a beginner user with slower typing, more errors, and frequent hesitations",
        "typingSpeed": "slow",
        "mouseAccuracy": 0.6,
        "isDefault": False,
        "settings": {
            "delayVariation": 50,
            "typingErrors": 8,
            "hesitationPauses": 35,
            "preserveStructure": True,
            "removeMouseOnUpload": False,
        },
    },
    {
        "name": "Average User",
        "description": "Typical user behavior with moderate speed and occasional errors",
        "typingSpeed": "medium",
        "mouseAccuracy": 0.8,
        "isDefault": True,
        "settings": {
            "delayVariation": 25,
            "typingErrors": 3,
            "hesitationPauses": 15,
            "preserveStructure": True,
            "removeMouseOnUpload": False,
        },
    },
    {
        "name": "Expert User",
        "description": "Fast and accurate user with minimal hesitation",
        "typingSpeed": "fast",
        "mouseAccuracy": 0.95,
        "isDefault": False,
        "settings": {
            "delayVariation": 10,
            "typingErrors": 1,
            "hesitationPauses": 5,
            "preserveStructure": True,
            "removeMouseOnUpload": False,
        },
    },
    {
        "name": "Cautious User",
        "description": "Careful user who double-checks actions with many pauses",
        "typingSpeed": "slow",
        "mouseAccuracy": 0.9,
        "isDefault": False,
        "settings": {
            "delayVariation": 40,
            "typingErrors": 2,
            "hesitationPauses": 45,
            "preserveStructure": True,
            "removeMouseOnUpload": False,
        },
    },
    {
        "name": "Power User",
        "description": "Very fast user with keyboard shortcuts and minimal mouse use",
        "typingSpeed": "fast",
        "mouseAccuracy": 0.85,
        "isDefault": False,
        "settings": {
            "delayVariation": 5,
            "typingErrors": 0,
            "hesitationPauses": 2,
            "preserveStructure": True,
            "removeMouseOnUpload": True,
        },
    },
]


# ============================================================================
# Main Storage Class
# ============================================================================

class ProfileStorage:
    """
    Database storage for humanization profiles.

    Args:
        db: DatabaseConnector shared with the other storage classes
    """

    def __init__(self, db: DatabaseConnector):
        self.db = db

    def initialize_schema(self):
        """Create the profile table if it doesn't exist."""
        autoincrement = "AUTOINCREMENT" if self.db.is_sqlite else "AUTO_INCREMENT"
        boolean_type = "BOOLEAN" if self.db.is_sqlite else "TINYINT(1)"

        with self.db.get_connection() as conn:
            conn.execute(text(f"""
                CREATE TABLE IF NOT EXISTS {TABLE_PROFILES} (
                    profile_id INTEGER PRIMARY KEY {autoincrement},
                    name VARCHAR(255) NOT NULL UNIQUE,
                    description TEXT,
                    settings TEXT NOT NULL,
                    typing_speed TEXT NOT NULL DEFAULT 'medium',
                    mouse_accuracy REAL DEFAULT 0.8,
                    is_default {boolean_type} DEFAULT 0,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """))
            conn.commit()

        _LOGGER.info("Profile storage schema initialized")

    def create_default_profiles(self) -> int:
        """
        Seed the built-in profiles into an empty store.

        Returns:
            Number of profiles created (0 if any profile already exists)
        """
        if self.get_all_profiles():
            return 0

        for profile in DEFAULT_PROFILES:
            self.create_profile(profile)

        _LOGGER.info(f"Created {len(DEFAULT_PROFILES)} default humanization profiles")
        return len(DEFAULT_PROFILES)

    # ========================================================================
    # CRUD
    # ========================================================================

    def create_profile(self, data: Dict) -> HumanizationProfile:
        """
        Create a profile from its camelCase representation.

        Raises:
            ValidationError: Bad values or duplicate name
        """
        valid = _validate(PROFILE_CREATE_SCHEMA, data)
        settings = HumanizationSettings.from_dict(valid.get("settings"))
        is_default = valid.get("isDefault", False)
        now = datetime.now().timestamp()

        with self.db.get_connection() as conn:
            if is_default:
                self._unset_default(conn)
            try:
                result = conn.execute(text(f"""
                    INSERT INTO {TABLE_PROFILES} (
                        name, description, settings, typing_speed,
                        mouse_accuracy, is_default, created_at, updated_at
                    ) VALUES (
                        :name, :description, :settings, :speed,
                        :accuracy, :is_default, :created_at, :updated_at
                    )
                """), {
                    "name": valid["name"],
                    "description": valid.get("description"),
                    "settings": json.dumps(settings.to_dict()),
                    "speed": valid.get("typingSpeed", "medium"),
                    "accuracy": valid.get("mouseAccuracy", 0.8),
                    "is_default": is_default,
                    "created_at": now,
                    "updated_at": now,
                })
            except IntegrityError as e:
                conn.rollback()
                raise ValidationError(f"Profile name already exists: {valid['name']}") from e
            conn.commit()

        _LOGGER.info(f"Created humanization profile {valid['name']!r}")
        return self.get_profile(result.lastrowid)

    def get_profile(self, profile_id: int) -> HumanizationProfile:
        return self._fetch_one("profile_id = :value", profile_id, "profile")

    def get_profile_by_name(self, name: str) -> HumanizationProfile:
        return self._fetch_one("name = :value", name, "profile")

    def get_default_profile(self) -> Optional[HumanizationProfile]:
        try:
            return self._fetch_one("is_default = :value", True, "default profile")
        except NotFoundError:
            return None

    def get_all_profiles(self) -> List[HumanizationProfile]:
        with self.db.get_connection() as conn:
            result = conn.execute(
                text(f"SELECT * FROM {TABLE_PROFILES} ORDER BY profile_id")
            )
            return [self._row_to_profile(row) for row in result]

    def update_profile(self, profile_id: int, updates: Dict) -> HumanizationProfile:
        """
        Apply partial updates to a profile.

        Setting isDefault=true clears the flag on every other profile first.
        """
        valid = _validate(PROFILE_UPDATE_SCHEMA, updates)
        self.get_profile(profile_id)

        columns = {
            "name": "name",
            "description": "description",
            "typingSpeed": "typing_speed",
            "mouseAccuracy": "mouse_accuracy",
            "isDefault": "is_default",
        }
        assignments = []
        params = {"id": profile_id, "updated_at": datetime.now().timestamp()}

        for api_name, column in columns.items():
            if api_name in valid:
                assignments.append(f"{column} = :{column}")
                params[column] = valid[api_name]

        if "settings" in valid:
            settings = HumanizationSettings.from_dict(valid["settings"])
            assignments.append("settings = :settings")
            params["settings"] = json.dumps(settings.to_dict())

        assignments.append("updated_at = :updated_at")

        with self.db.get_connection() as conn:
            if valid.get("isDefault"):
                self._unset_default(conn)
            try:
                conn.execute(text(f"""
                    UPDATE {TABLE_PROFILES}
                    SET {', '.join(assignments)}
                    WHERE profile_id = :id
                """), params)
            except IntegrityError as e:
                conn.rollback()
                raise ValidationError(f"Profile name already exists: {valid.get('name')}") from e
            conn.commit()

        _LOGGER.info(f"Updated humanization profile {profile_id}")
        return self.get_profile(profile_id)

    def delete_profile(self, profile_id: int) -> bool:
        """Delete a profile. Returns False if it did not exist."""
        with self.db.get_connection() as conn:
            result = conn.execute(
                text(f"DELETE FROM {TABLE_PROFILES} WHERE profile_id = :id"),
                {"id": profile_id},
            )
            conn.commit()
        return result.rowcount > 0

    def resolve_settings(self, profile_id: int) -> HumanizationSettings:
        """Settings of a profile, adjusted for its typing speed."""
        return self.get_profile(profile_id).resolved_settings()

    # ========================================================================
    # Helpers
    # ========================================================================

    def _unset_default(self, conn):
        conn.execute(text(f"""
            UPDATE {TABLE_PROFILES}
            SET is_default = :false_value
            WHERE is_default = :true_value
        """), {"false_value": False, "true_value": True})

    def _fetch_one(self, condition: str, value, kind: str) -> HumanizationProfile:
        with self.db.get_connection() as conn:
            row = conn.execute(
                text(f"SELECT * FROM {TABLE_PROFILES} WHERE {condition} LIMIT 1"),
                {"value": value},
            ).fetchone()

        if row is None:
            raise NotFoundError(kind, value)
        return self._row_to_profile(row)

    def _row_to_profile(self, row) -> HumanizationProfile:
        data = row._mapping
        return HumanizationProfile(
            profile_id=data["profile_id"],
            name=data["name"],
            description=data["description"],
            settings=HumanizationSettings.from_dict(json.loads(data["settings"])),
            typing_speed=data["typing_speed"],
            mouse_accuracy=data["mouse_accuracy"],
            is_default=bool(data["is_default"]),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
        )
