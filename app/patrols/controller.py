# ============================================================================
# STREET PATROL LOG - Patrol Session Controller
# ============================================================================
# Every mutation of a patrol goes through here:
#
#   start -> increment / add contact / notes / details -> close
#
# Each operation is one store write. The local patrol view and the change
# signal are applied only after the store acknowledges the write; a failed
# write leaves both untouched.
# ============================================================================

import dataclasses
import logging
import threading
import uuid
import weakref
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from app.auth.models import Session
from app.config import get_config, get_local_now
from app.errors import (
    AuthError,
    AuthorizationError,
    PatrolNotFoundError,
    StateError,
    ValidationError,
)

from .models import (
    AGE_BANDS,
    ETHNICITIES,
    GENDERS,
    STATISTIC_KEYS,
    Patrol,
    PatrolRepository,
    PatrolStatus,
    contact_key,
    empty_contact_statistics,
    empty_statistics,
    parse_ts,
)
from .notifier import PatrolChangeNotifier, get_notifier

logger = logging.getLogger("patrols.controller")

REQUIRED_FIELDS = {
    "location": "Location is required",
    "team_leader": "Team leader is required",
    "team_members": "Team members are required",
}


def _text(form: Mapping[str, Any], key: str) -> str:
    value = form.get(key)
    return "" if value is None else str(value)


def _parse_start_time(value: Any) -> Optional[datetime]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return parse_ts(value)
    except (TypeError, ValueError):
        raise ValidationError("Start time must be a valid date and time")


def parse_details(form: Mapping[str, Any], default_start: datetime) -> Dict[str, Any]:
    """Validate the patrol detail form into store fields.

    police_notified is never taken from the form; it follows the CAD number.
    """
    for key, message in REQUIRED_FIELDS.items():
        if not _text(form, key).strip():
            raise ValidationError(message)

    cad_number = _text(form, "police_cad_number").strip()
    return {
        "location": _text(form, "location").strip(),
        "team_leader": _text(form, "team_leader").strip(),
        "team_members": _text(form, "team_members").strip(),
        "start_time": _parse_start_time(form.get("start_time")) or default_start,
        "police_cad_number": cad_number,
        "police_notified": bool(cad_number),
    }


class PatrolSessionController:
    """
    Orchestrates create/update/close-out/increment operations against
    single patrol records for the acting Session.
    """

    def __init__(
        self,
        repository: Optional[PatrolRepository] = None,
        notifier: Optional[PatrolChangeNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cache_size: Optional[int] = None,
    ):
        self.repository = repository or PatrolRepository()
        self.notifier = notifier or get_notifier()
        self.clock = clock or get_local_now
        self.cache_size = max(1, cache_size or get_config("patrol_cache_size", 256))
        # Last acknowledged state of recently touched patrols, least recent first
        self._patrols: "OrderedDict[str, Patrol]" = OrderedDict()
        # One lock per patrol id serializes read-modify-write cycles.
        # Entries disappear once no operation holds a reference.
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ---- helpers ----

    def _lock_for(self, patrol_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(patrol_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[patrol_id] = lock
            return lock

    def _remember(self, patrol: Patrol):
        with self._locks_guard:
            self._patrols[patrol.id] = patrol
            self._patrols.move_to_end(patrol.id)
            while len(self._patrols) > self.cache_size:
                self._patrols.popitem(last=False)

    def _forget(self, patrol_id: str):
        with self._locks_guard:
            self._patrols.pop(patrol_id, None)

    @staticmethod
    def _require_session(session: Optional[Session]) -> Session:
        if session is None or not session.user_id:
            raise AuthError("You must be logged in")
        return session

    def _load_owned(self, session: Session, patrol_id: str) -> Patrol:
        patrol = self.repository.get(patrol_id, session.user_id)
        if patrol is not None:
            return patrol
        if self.repository.get_owner(patrol_id) is None:
            raise PatrolNotFoundError("Patrol not found")
        logger.warning("User %s denied access to patrol %s", session.user_id, patrol_id)
        raise AuthorizationError("You do not have access to this patrol")

    def _commit(self, session: Session, patrol: Patrol, fields: Dict[str, Any], change: str) -> Patrol:
        """Write, then (only on success) apply locally and signal."""
        self.repository.update(patrol.id, session.user_id, fields)
        updated = dataclasses.replace(patrol, **fields)
        self._remember(updated)
        self.notifier.notify(session.user_id, patrol.id, change)
        logger.info("Patrol %s %s by %s", patrol.id, change, session.user_id)
        return updated

    def cached(self, patrol_id: str) -> Optional[Patrol]:
        """Last acknowledged state of a patrol, without a store round trip."""
        return self._patrols.get(patrol_id)

    # ---- reads ----

    def get(self, session: Optional[Session], patrol_id: str) -> Patrol:
        session = self._require_session(session)
        patrol = self._load_owned(session, patrol_id)
        self._remember(patrol)
        return patrol

    def list_patrols(self, session: Optional[Session]) -> List[Patrol]:
        """All of the user's patrols, newest start time first."""
        session = self._require_session(session)
        return self.repository.list_by_owner(session.user_id)

    def active_patrols(self, session: Optional[Session]) -> List[Patrol]:
        session = self._require_session(session)
        return self.repository.list_active(session.user_id)

    # ---- operations ----

    def start(self, session: Optional[Session], form: Mapping[str, Any]) -> str:
        """Create a new active patrol with zeroed counters. Returns its id."""
        session = self._require_session(session)
        details = parse_details(form, default_start=self.clock())

        patrol = Patrol(
            id=uuid.uuid4().hex,
            owner=session.user_id,
            status=PatrolStatus.ACTIVE,
            statistics=empty_statistics(),
            contact_statistics=empty_contact_statistics(),
            notes="",
            **details,
        )
        self.repository.insert(patrol)
        self._remember(patrol)
        self.notifier.notify(session.user_id, patrol.id, "created")
        logger.info("Patrol %s started by %s at %s", patrol.id, session.user_id, patrol.location)
        return patrol.id

    def increment_statistic(self, session: Optional[Session], patrol_id: str, key: str, delta: int) -> Patrol:
        """Apply +1/-1 to one counter, clamped at zero before writing."""
        session = self._require_session(session)
        if key not in STATISTIC_KEYS:
            raise ValidationError(f"Unknown statistic: {key}")
        if delta not in (1, -1):
            raise ValidationError("Statistic changes must be +1 or -1")

        with self._lock_for(patrol_id):
            patrol = self._load_owned(session, patrol_id)
            if not patrol.is_active:
                raise StateError("Patrol has been completed; statistics are closed")
            statistics = dict(patrol.statistics)
            statistics[key] = max(0, statistics.get(key, 0) + delta)
            return self._commit(session, patrol, {"statistics": statistics}, "statistics")

    def add_contact(
        self,
        session: Optional[Session],
        patrol_id: str,
        ethnicity: Optional[str],
        gender: Optional[str],
        age_band: Optional[str],
    ) -> Patrol:
        """Count one contact in the ethnicity x gender x age-band matrix."""
        session = self._require_session(session)
        if not ethnicity or not gender or not age_band:
            raise ValidationError("Please select all three categories")
        if ethnicity not in ETHNICITIES or gender not in GENDERS or age_band not in AGE_BANDS:
            raise ValidationError("Unknown contact category")

        key = contact_key(ethnicity, gender, age_band)
        with self._lock_for(patrol_id):
            patrol = self._load_owned(session, patrol_id)
            if not patrol.is_active:
                raise StateError("Patrol has been completed; contacts are closed")
            contacts = dict(patrol.contact_statistics)
            contacts[key] = contacts.get(key, 0) + 1
            return self._commit(session, patrol, {"contact_statistics": contacts}, "contacts")

    def save_notes(self, session: Optional[Session], patrol_id: str, text: Optional[str]) -> Patrol:
        session = self._require_session(session)
        with self._lock_for(patrol_id):
            patrol = self._load_owned(session, patrol_id)
            return self._commit(session, patrol, {"notes": text or ""}, "notes")

    def update_details(self, session: Optional[Session], patrol_id: str, fields: Mapping[str, Any]) -> Patrol:
        """Overwrite the editable details; police_notified follows the CAD number."""
        session = self._require_session(session)
        with self._lock_for(patrol_id):
            patrol = self._load_owned(session, patrol_id)
            details = parse_details(fields, default_start=patrol.start_time)
            if patrol.end_time is not None and details["start_time"] > patrol.end_time:
                raise ValidationError("Start time cannot be after the patrol end time")
            return self._commit(session, patrol, details, "details")

    def close(self, session: Optional[Session], patrol_id: str) -> Patrol:
        """Complete an active patrol. Irreversible; closing twice is a StateError."""
        session = self._require_session(session)
        with self._lock_for(patrol_id):
            patrol = self._load_owned(session, patrol_id)
            if patrol.status is PatrolStatus.COMPLETED:
                raise StateError("Patrol has already been completed")

            end_time = self.clock()
            if patrol.start_time is not None and end_time < patrol.start_time:
                end_time = patrol.start_time
            closed = self._commit(
                session,
                patrol,
                {"status": PatrolStatus.COMPLETED, "end_time": end_time},
                "closed",
            )
        # Completed patrols take no further counter writes
        self._forget(patrol_id)
        return closed
