# ============================================================================
# STREET PATROL LOG - Patrol Models & Record Store
# ============================================================================
# The patrols table, the Patrol dataclass and the repository that issues
# every read/write against it. Statistics and the contact matrix are stored
# as JSON objects keyed by the fixed counter/contact domains below.
# ============================================================================

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from app.config import get_timezone
from app.db import get_conn
from app.errors import PatrolNotFoundError, StoreError

logger = logging.getLogger("patrols.store")


# ============================================================================
# Fixed domains
# ============================================================================

# Declared order is the display/export order.
STATISTIC_LABELS = {
    "conversations": "Conversations",
    "prayers": "Prayers",
    "water_bottles": "Water Bottles",
    "first_aid": "First Aid",
    "directions": "Directions",
    "transport_assistance": "Transport Help",
    "vulnerable_people": "Vulnerable People",
    "bottles_glass_collected": "Bottles/Glass",
    "cans_collected": "Cans Collected",
}
STATISTIC_KEYS = tuple(STATISTIC_LABELS)

ETHNICITY_LABELS = {
    "white": "White",
    "afroCaribbean": "Afro/Caribbean",
    "asian": "Asian",
    "easternEuropean": "Eastern European",
}
GENDER_LABELS = {
    "Male": "Male",
    "Female": "Female",
}
AGE_BAND_LABELS = {
    "Under13": "Under 13",
    "13To17": "13-17",
    "18To25": "18-25",
    "Over25": "Over 25",
}
ETHNICITIES = tuple(ETHNICITY_LABELS)
GENDERS = tuple(GENDER_LABELS)
AGE_BANDS = tuple(AGE_BAND_LABELS)


def contact_key(ethnicity: str, gender: str, age_band: str) -> str:
    return f"{ethnicity}{gender}{age_band}"


CONTACT_KEYS = tuple(
    contact_key(eth, gender, age)
    for eth in ETHNICITIES
    for age in AGE_BANDS
    for gender in GENDERS
)


def empty_statistics() -> Dict[str, int]:
    return {key: 0 for key in STATISTIC_KEYS}


def empty_contact_statistics() -> Dict[str, int]:
    return {key: 0 for key in CONTACT_KEYS}


def _normalize_counts(raw: Optional[Dict[str, Any]], keys) -> Dict[str, int]:
    """Project stored counts onto a fixed key domain; unknown keys are dropped."""
    raw = raw or {}
    counts = {}
    for key in keys:
        try:
            counts[key] = max(0, int(raw.get(key) or 0))
        except (TypeError, ValueError):
            counts[key] = 0
    return counts


class PatrolStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"

    @property
    def label(self) -> str:
        return "Completed" if self is PatrolStatus.COMPLETED else "Active"


# ============================================================================
# Timestamps
# ============================================================================

def format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat()


def parse_ts(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp into a naive local datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is not None:
        dt = dt.astimezone(get_timezone()).replace(tzinfo=None)
    return dt


# ============================================================================
# Database Schema
# ============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS patrols (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    location TEXT NOT NULL DEFAULT '',
    team_leader TEXT NOT NULL DEFAULT '',
    team_members TEXT NOT NULL DEFAULT '',
    start_time TEXT NOT NULL,
    end_time TEXT,
    police_notified INTEGER NOT NULL DEFAULT 0,
    police_cad_number TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'active',
    statistics_json TEXT NOT NULL DEFAULT '{}',
    contact_statistics_json TEXT NOT NULL DEFAULT '{}',
    notes TEXT NOT NULL DEFAULT '',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_patrols_owner_start ON patrols(owner, start_time);
CREATE INDEX IF NOT EXISTS idx_patrols_owner_status ON patrols(owner, status);
"""

# Patrol attribute -> column. Only these may be written by update().
_COLUMNS = {
    "location": "location",
    "team_leader": "team_leader",
    "team_members": "team_members",
    "start_time": "start_time",
    "end_time": "end_time",
    "police_notified": "police_notified",
    "police_cad_number": "police_cad_number",
    "status": "status",
    "statistics": "statistics_json",
    "contact_statistics": "contact_statistics_json",
    "notes": "notes",
}


def _to_column_value(name: str, value: Any) -> Any:
    if name in ("start_time", "end_time"):
        return format_ts(value)
    if name == "statistics":
        return json.dumps(_normalize_counts(value, STATISTIC_KEYS))
    if name == "contact_statistics":
        return json.dumps(_normalize_counts(value, CONTACT_KEYS))
    if name == "police_notified":
        return 1 if value else 0
    if name == "status":
        return PatrolStatus(value).value
    return value


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class Patrol:
    id: str
    owner: str
    location: str = ""
    team_leader: str = ""
    team_members: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    police_notified: bool = False
    police_cad_number: str = ""
    status: PatrolStatus = PatrolStatus.ACTIVE
    statistics: Dict[str, int] = field(default_factory=empty_statistics)
    contact_statistics: Dict[str, int] = field(default_factory=empty_contact_statistics)
    notes: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is PatrolStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "location": self.location,
            "team_leader": self.team_leader,
            "team_members": self.team_members,
            "start_time": format_ts(self.start_time),
            "end_time": format_ts(self.end_time),
            "police_notified": self.police_notified,
            "police_cad_number": self.police_cad_number,
            "status": self.status.value,
            "statistics": dict(self.statistics),
            "contact_statistics": dict(self.contact_statistics),
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "Patrol":
        d = dict(row)
        try:
            stats = json.loads(d.get("statistics_json") or "{}")
        except ValueError:
            stats = {}
        try:
            contacts = json.loads(d.get("contact_statistics_json") or "{}")
        except ValueError:
            contacts = {}
        return cls(
            id=d["id"],
            owner=d["owner"],
            location=d.get("location") or "",
            team_leader=d.get("team_leader") or "",
            team_members=d.get("team_members") or "",
            start_time=parse_ts(d.get("start_time")),
            end_time=parse_ts(d.get("end_time")),
            police_notified=bool(d.get("police_notified")),
            police_cad_number=d.get("police_cad_number") or "",
            status=PatrolStatus(d.get("status") or "active"),
            statistics=_normalize_counts(stats, STATISTIC_KEYS),
            contact_statistics=_normalize_counts(contacts, CONTACT_KEYS),
            notes=d.get("notes") or "",
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


# ============================================================================
# Repository
# ============================================================================

class PatrolRepository:
    """
    Record store client for the patrols table.

    Every sqlite failure surfaces as StoreError; callers never see
    sqlite3 exceptions.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = db_path

    def _conn(self) -> sqlite3.Connection:
        return get_conn(self.db_path)

    def init_schema(self):
        try:
            conn = self._conn()
            try:
                conn.executescript(SCHEMA_SQL)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Failed to initialize patrols schema: %s", e)
            raise StoreError("Could not initialize the patrol store") from e

    def insert(self, patrol: Patrol):
        """Insert one patrol row."""
        try:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    INSERT INTO patrols (
                        id, owner, location, team_leader, team_members,
                        start_time, end_time, police_notified, police_cad_number,
                        status, statistics_json, contact_statistics_json, notes
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        patrol.id,
                        patrol.owner,
                        patrol.location,
                        patrol.team_leader,
                        patrol.team_members,
                        format_ts(patrol.start_time),
                        format_ts(patrol.end_time),
                        1 if patrol.police_notified else 0,
                        patrol.police_cad_number,
                        patrol.status.value,
                        json.dumps(_normalize_counts(patrol.statistics, STATISTIC_KEYS)),
                        json.dumps(_normalize_counts(patrol.contact_statistics, CONTACT_KEYS)),
                        patrol.notes,
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Insert of patrol %s failed: %s", patrol.id, e)
            raise StoreError("Failed to save the new patrol") from e

    def update(self, patrol_id: str, owner: str, fields: Dict[str, Any]):
        """Update the given fields of one patrol, scoped to its owner."""
        unknown = set(fields) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"Not updatable: {', '.join(sorted(unknown))}")
        if not fields:
            return

        assignments = [f"{_COLUMNS[name]} = ?" for name in fields]
        params = [_to_column_value(name, value) for name, value in fields.items()]
        assignments.append("updated_at = CURRENT_TIMESTAMP")

        try:
            conn = self._conn()
            try:
                cur = conn.execute(
                    f"UPDATE patrols SET {', '.join(assignments)} WHERE id = ? AND owner = ?",
                    params + [patrol_id, owner],
                )
                conn.commit()
                updated = cur.rowcount
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Update of patrol %s failed: %s", patrol_id, e)
            raise StoreError("Failed to save patrol changes") from e

        if updated == 0:
            raise PatrolNotFoundError("Patrol not found")

    def _select_one(self, sql: str, params) -> Optional[Patrol]:
        try:
            conn = self._conn()
            try:
                row = conn.execute(sql, params).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Patrol read failed: %s", e)
            raise StoreError("Failed to load patrol data") from e
        return Patrol.from_row(row) if row else None

    def _select_many(self, sql: str, params) -> List[Patrol]:
        try:
            conn = self._conn()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Patrol list read failed: %s", e)
            raise StoreError("Failed to load patrol history") from e
        return [Patrol.from_row(r) for r in rows]

    def get(self, patrol_id: str, owner: str) -> Optional[Patrol]:
        return self._select_one(
            "SELECT * FROM patrols WHERE id = ? AND owner = ?", (patrol_id, owner)
        )

    def get_owner(self, patrol_id: str) -> Optional[str]:
        """Owner of a patrol regardless of who asks; None if the id is unknown."""
        try:
            conn = self._conn()
            try:
                row = conn.execute("SELECT owner FROM patrols WHERE id = ?", (patrol_id,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Patrol owner lookup failed: %s", e)
            raise StoreError("Failed to load patrol data") from e
        return row["owner"] if row else None

    def list_by_owner(self, owner: str) -> List[Patrol]:
        """All of a user's patrols, newest start time first."""
        return self._select_many(
            "SELECT * FROM patrols WHERE owner = ? ORDER BY start_time DESC, created_at DESC",
            (owner,),
        )

    def list_active(self, owner: str) -> List[Patrol]:
        return self._select_many(
            "SELECT * FROM patrols WHERE owner = ? AND status = ? ORDER BY start_time DESC",
            (owner, PatrolStatus.ACTIVE.value),
        )
