import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from tripbook.models import (
    Booking,
    EngagementSession,
    PaymentOption,
    ProfileDescriptor,
    ProviderProfile,
    ProviderStats,
    Reputation,
    Review,
)
from tripbook.services.clock import from_iso, to_iso
from tripbook.services.errors import (
    AlreadyExistsError,
    DuplicateReviewError,
    HasActiveBookingsError,
    InvalidStateError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = ("PENDING", "DISCUSSING", "APPROVED", "IN_PROGRESS", "CHECKED_IN")

# Columns a transition may write. Anything else is a programming error.
_WRITE_ONCE_COLUMNS = {"responded_at", "approved_at", "started_at", "completed_at", "cancelled_at"}
_TRANSITION_COLUMNS = _WRITE_ONCE_COLUMNS | {
    "agreed_payment_type",
    "agreed_payment_amount",
    "agreed_payment_details",
    "instructions",
    "cancellation_reason",
    "rejection_reason",
}
_BOOKING_COLUMNS = (
    "id",
    "vertical",
    "provider_id",
    "requester_id",
    "window_start",
    "window_end",
    "party_size",
    "status",
    "note",
    "payment_option_id",
    "agreed_payment_type",
    "agreed_payment_amount",
    "agreed_payment_details",
    "instructions",
    "cancellation_reason",
    "rejection_reason",
    "requested_at",
    "responded_at",
    "approved_at",
    "started_at",
    "completed_at",
    "cancelled_at",
)
_PROFILE_DESCRIPTOR_COLUMNS = {
    "title": "title",
    "description": "description",
    "city": "city",
    "neighborhood": "neighborhood",
    "address": "address_json",
    "coordinates": "coordinates_json",
    "languages": "languages_json",
    "service_categories": "service_categories_json",
    "max_capacity": "max_capacity",
    "minimum_stay_nights": "minimum_stay_nights",
    "maximum_stay_nights": "maximum_stay_nights",
    "attributes": "attributes_json",
}


def _load_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable JSON column value")
        return default


@dataclass
class BookingStore:
    """SQLite repository for profiles, bookings, sessions, reviews and payment options.

    Every read and write goes through ``_lock``. Check-then-act sequences that
    span several calls (approving against the current set of bookings) must
    additionally hold ``provider_lock`` for the provider involved, acquired
    before any store call.
    """

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        self._provider_locks: Dict[Tuple[str, str], Lock] = {}
        self._provider_locks_guard = Lock()
        self._shared_conn: Optional[sqlite3.Connection] = None
        if self.db_path == ":memory:":
            self._shared_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._shared_conn.row_factory = sqlite3.Row
        else:
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        if self._shared_conn is not None:
            return self._shared_conn
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def provider_lock(self, vertical: str, provider_id: str) -> Lock:
        key = (vertical, provider_id)
        with self._provider_locks_guard:
            lock = self._provider_locks.get(key)
            if lock is None:
                lock = Lock()
                self._provider_locks[key] = lock
            return lock

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS participants (
                        user_id TEXT PRIMARY KEY,
                        trust_score INTEGER NOT NULL DEFAULT 0,
                        trust_level TEXT NOT NULL DEFAULT 'starter',
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS profiles (
                        vertical TEXT NOT NULL,
                        owner_id TEXT NOT NULL,
                        is_enabled INTEGER NOT NULL DEFAULT 0,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        city TEXT NOT NULL,
                        neighborhood TEXT,
                        address_json TEXT,
                        coordinates_json TEXT,
                        languages_json TEXT NOT NULL DEFAULT '[]',
                        service_categories_json TEXT NOT NULL DEFAULT '[]',
                        max_capacity INTEGER NOT NULL,
                        minimum_stay_nights INTEGER,
                        maximum_stay_nights INTEGER,
                        attributes_json TEXT NOT NULL DEFAULT '{}',
                        response_rate REAL NOT NULL DEFAULT 0,
                        average_response_latency_hours INTEGER NOT NULL DEFAULT 0,
                        completed_engagements INTEGER NOT NULL DEFAULT 0,
                        total_party_served INTEGER NOT NULL DEFAULT 0,
                        rating REAL NOT NULL DEFAULT 0,
                        review_count INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        last_active_at TEXT,
                        PRIMARY KEY (vertical, owner_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS payment_options (
                        id TEXT PRIMARY KEY,
                        vertical TEXT NOT NULL,
                        owner_id TEXT NOT NULL,
                        payment_type TEXT NOT NULL,
                        details TEXT NOT NULL DEFAULT '',
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS bookings (
                        id TEXT PRIMARY KEY,
                        vertical TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        requester_id TEXT NOT NULL,
                        window_start TEXT NOT NULL,
                        window_end TEXT NOT NULL,
                        party_size INTEGER NOT NULL,
                        status TEXT NOT NULL,
                        note TEXT NOT NULL DEFAULT '',
                        payment_option_id TEXT,
                        agreed_payment_type TEXT,
                        agreed_payment_amount REAL,
                        agreed_payment_details TEXT,
                        instructions TEXT,
                        cancellation_reason TEXT,
                        rejection_reason TEXT,
                        requested_at TEXT NOT NULL,
                        responded_at TEXT,
                        approved_at TEXT,
                        started_at TEXT,
                        completed_at TEXT,
                        cancelled_at TEXT
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_bookings_provider ON bookings (vertical, provider_id, status)"
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS booking_status_history (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        actor_user_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS engagement_sessions (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        started_at TEXT NOT NULL,
                        ended_at TEXT,
                        duration_minutes INTEGER,
                        notes TEXT NOT NULL DEFAULT ''
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS reviews (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        vertical TEXT NOT NULL,
                        reviewer_id TEXT NOT NULL,
                        reviewee_id TEXT NOT NULL,
                        rating INTEGER NOT NULL,
                        categories_json TEXT NOT NULL DEFAULT '{}',
                        comment TEXT NOT NULL DEFAULT '',
                        is_public INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        UNIQUE (booking_id, reviewer_id)
                    )
                    """
                )
                self._ensure_column(conn, "profiles", "total_party_served", "INTEGER NOT NULL DEFAULT 0")
                self._ensure_column(conn, "participants", "password_hash", "TEXT")
                conn.commit()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    # ------------------------------------------------------------------
    # Participants

    def get_reputation(self, user_id: str) -> Reputation:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT trust_score, trust_level FROM participants WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        if not row:
            return Reputation(user_id=user_id)
        return Reputation(user_id=user_id, trust_score=int(row["trust_score"]), trust_level=row["trust_level"])

    def set_reputation(self, user_id: str, trust_score: int, trust_level: str, *, now: datetime) -> Reputation:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO participants (user_id, trust_score, trust_level, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        trust_score = excluded.trust_score,
                        trust_level = excluded.trust_level,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, int(trust_score), trust_level, to_iso(now)),
                )
                conn.commit()
        return Reputation(user_id=user_id, trust_score=int(trust_score), trust_level=trust_level)

    def set_password_hash(self, user_id: str, password_hash: str, *, now: datetime) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO participants (user_id, password_hash, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        password_hash = excluded.password_hash,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, password_hash, to_iso(now)),
                )
                conn.commit()

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT password_hash FROM participants WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        return row["password_hash"] if row else None

    # ------------------------------------------------------------------
    # Profiles

    def _row_to_profile(self, row: sqlite3.Row, payment_options: List[PaymentOption]) -> ProviderProfile:
        return ProviderProfile(
            vertical=row["vertical"],
            owner_id=row["owner_id"],
            is_enabled=bool(row["is_enabled"]),
            title=row["title"],
            description=row["description"] or "",
            city=row["city"],
            neighborhood=row["neighborhood"],
            address=_load_json(row["address_json"], None),
            coordinates=_load_json(row["coordinates_json"], None),
            languages=_load_json(row["languages_json"], []),
            service_categories=_load_json(row["service_categories_json"], []),
            max_capacity=int(row["max_capacity"]),
            minimum_stay_nights=row["minimum_stay_nights"],
            maximum_stay_nights=row["maximum_stay_nights"],
            attributes=_load_json(row["attributes_json"], {}),
            response_rate=float(row["response_rate"]),
            average_response_latency_hours=int(row["average_response_latency_hours"]),
            completed_engagements=int(row["completed_engagements"]),
            total_party_served=int(row["total_party_served"]),
            rating=float(row["rating"]),
            review_count=int(row["review_count"]),
            payment_options=payment_options,
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            last_active_at=from_iso(row["last_active_at"]),
        )

    def _load_profile(self, conn: sqlite3.Connection, vertical: str, owner_id: str) -> Optional[ProviderProfile]:
        row = conn.execute(
            "SELECT * FROM profiles WHERE vertical = ? AND owner_id = ?",
            (vertical, owner_id),
        ).fetchone()
        if not row:
            return None
        options = self._load_payment_options(conn, vertical, owner_id, active_only=True)
        return self._row_to_profile(row, options)

    def create_profile(
        self,
        vertical: str,
        owner_id: str,
        descriptor: ProfileDescriptor,
        *,
        now: datetime,
    ) -> ProviderProfile:
        data = descriptor.model_dump(mode="json")
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO profiles (
                            vertical, owner_id, is_enabled, title, description, city, neighborhood,
                            address_json, coordinates_json, languages_json, service_categories_json,
                            max_capacity, minimum_stay_nights, maximum_stay_nights, attributes_json,
                            created_at, updated_at, last_active_at
                        ) VALUES (?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            vertical,
                            owner_id,
                            data["title"].strip(),
                            data["description"],
                            data["city"].strip(),
                            data["neighborhood"],
                            json.dumps(data["address"]) if data["address"] is not None else None,
                            json.dumps(data["coordinates"]) if data["coordinates"] is not None else None,
                            json.dumps(data["languages"]),
                            json.dumps(data["service_categories"]),
                            data["max_capacity"],
                            data["minimum_stay_nights"],
                            data["maximum_stay_nights"],
                            json.dumps(data["attributes"]),
                            to_iso(now),
                            to_iso(now),
                            to_iso(now),
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise AlreadyExistsError("Profile already exists") from exc
                conn.commit()
                return self._load_profile(conn, vertical, owner_id)

    def get_profile(self, vertical: str, owner_id: str) -> Optional[ProviderProfile]:
        with self._lock:
            with self._connect() as conn:
                return self._load_profile(conn, vertical, owner_id)

    def list_profiles(
        self,
        vertical: str,
        *,
        enabled_only: bool = True,
        city: Optional[str] = None,
        min_capacity: Optional[int] = None,
    ) -> List[ProviderProfile]:
        query = "SELECT * FROM profiles WHERE vertical = ?"
        params: List[Any] = [vertical]
        if enabled_only:
            query += " AND is_enabled = 1"
        if city:
            query += " AND lower(city) = lower(?)"
            params.append(city.strip())
        if min_capacity is not None:
            query += " AND max_capacity >= ?"
            params.append(int(min_capacity))
        query += " ORDER BY rating DESC, review_count DESC, owner_id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
                return [
                    self._row_to_profile(
                        row,
                        self._load_payment_options(conn, vertical, row["owner_id"], active_only=True),
                    )
                    for row in rows
                ]

    def update_profile(
        self,
        vertical: str,
        owner_id: str,
        changes: Dict[str, Any],
        *,
        now: datetime,
    ) -> ProviderProfile:
        assignments: List[str] = []
        params: List[Any] = []
        for key, value in changes.items():
            column = _PROFILE_DESCRIPTOR_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Not a descriptor field: {key}")
            if column.endswith("_json"):
                value = json.dumps(value) if value is not None else None
                if value is None and column in {"languages_json", "service_categories_json"}:
                    value = "[]"
                if value is None and column == "attributes_json":
                    value = "{}"
            assignments.append(f"{column} = ?")
            params.append(value)
        assignments.extend(["updated_at = ?", "last_active_at = ?"])
        params.extend([to_iso(now), to_iso(now)])

        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE profiles SET {', '.join(assignments)} WHERE vertical = ? AND owner_id = ?",
                    (*params, vertical, owner_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Profile not found")
                conn.commit()
                return self._load_profile(conn, vertical, owner_id)

    def set_profile_enabled(self, vertical: str, owner_id: str, enabled: bool, *, now: datetime) -> ProviderProfile:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE profiles SET is_enabled = ?, updated_at = ?, last_active_at = ?
                    WHERE vertical = ? AND owner_id = ?
                    """,
                    (1 if enabled else 0, to_iso(now), to_iso(now), vertical, owner_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Profile not found")
                conn.commit()
                return self._load_profile(conn, vertical, owner_id)

    def delete_profile(self, vertical: str, owner_id: str) -> None:
        placeholders = ", ".join("?" for _ in NON_TERMINAL_STATUSES)
        with self._lock:
            with self._connect() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM profiles WHERE vertical = ? AND owner_id = ?",
                    (vertical, owner_id),
                ).fetchone()
                if not exists:
                    raise NotFoundError("Profile not found")
                active = conn.execute(
                    f"""
                    SELECT COUNT(*) AS n FROM bookings
                    WHERE vertical = ? AND provider_id = ? AND status IN ({placeholders})
                    """,
                    (vertical, owner_id, *NON_TERMINAL_STATUSES),
                ).fetchone()
                if int(active["n"]) > 0:
                    raise HasActiveBookingsError("Cannot delete profile with active bookings")
                conn.execute("DELETE FROM payment_options WHERE vertical = ? AND owner_id = ?", (vertical, owner_id))
                conn.execute("DELETE FROM profiles WHERE vertical = ? AND owner_id = ?", (vertical, owner_id))
                conn.commit()

    def write_provider_stats(self, stats: ProviderStats) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE profiles
                    SET response_rate = ?, average_response_latency_hours = ?,
                        completed_engagements = ?, total_party_served = ?
                    WHERE vertical = ? AND owner_id = ?
                    """,
                    (
                        stats.response_rate,
                        stats.average_response_latency_hours,
                        stats.completed_engagements,
                        stats.total_party_served,
                        stats.vertical,
                        stats.provider_id,
                    ),
                )
                conn.commit()
                return cursor.rowcount > 0

    def write_provider_rating(self, vertical: str, owner_id: str, rating: float, review_count: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE profiles SET rating = ?, review_count = ? WHERE vertical = ? AND owner_id = ?",
                    (rating, review_count, vertical, owner_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Payment options

    def _row_to_payment_option(self, row: sqlite3.Row) -> PaymentOption:
        return PaymentOption(
            id=row["id"],
            vertical=row["vertical"],
            owner_id=row["owner_id"],
            payment_type=row["payment_type"],
            details=row["details"] or "",
            is_active=bool(row["is_active"]),
            created_at=from_iso(row["created_at"]),
        )

    def _load_payment_options(
        self,
        conn: sqlite3.Connection,
        vertical: str,
        owner_id: str,
        *,
        active_only: bool,
    ) -> List[PaymentOption]:
        query = "SELECT * FROM payment_options WHERE vertical = ? AND owner_id = ?"
        if active_only:
            query += " AND is_active = 1"
        rows = conn.execute(query + " ORDER BY created_at", (vertical, owner_id)).fetchall()
        return [self._row_to_payment_option(row) for row in rows]

    def add_payment_option(
        self,
        vertical: str,
        owner_id: str,
        payment_type: str,
        details: str,
        *,
        now: datetime,
    ) -> PaymentOption:
        option = PaymentOption(
            id=f"po_{uuid4().hex[:10]}",
            vertical=vertical,
            owner_id=owner_id,
            payment_type=payment_type.strip(),
            details=details.strip(),
            is_active=True,
            created_at=now,
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO payment_options (id, vertical, owner_id, payment_type, details, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    """,
                    (option.id, vertical, owner_id, option.payment_type, option.details, to_iso(now)),
                )
                conn.commit()
        return option

    def list_payment_options(self, vertical: str, owner_id: str, *, active_only: bool = True) -> List[PaymentOption]:
        with self._lock:
            with self._connect() as conn:
                return self._load_payment_options(conn, vertical, owner_id, active_only=active_only)

    def get_payment_option(self, option_id: str) -> Optional[PaymentOption]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM payment_options WHERE id = ?", (option_id,)).fetchone()
        return self._row_to_payment_option(row) if row else None

    def deactivate_payment_option(self, option_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("UPDATE payment_options SET is_active = 0 WHERE id = ?", (option_id,))
                conn.commit()

    # ------------------------------------------------------------------
    # Bookings

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            vertical=row["vertical"],
            provider_id=row["provider_id"],
            requester_id=row["requester_id"],
            window_start=from_iso(row["window_start"]),
            window_end=from_iso(row["window_end"]),
            party_size=int(row["party_size"]),
            status=row["status"],
            note=row["note"] or "",
            payment_option_id=row["payment_option_id"],
            agreed_payment_type=row["agreed_payment_type"],
            agreed_payment_amount=row["agreed_payment_amount"],
            agreed_payment_details=row["agreed_payment_details"],
            instructions=row["instructions"],
            cancellation_reason=row["cancellation_reason"],
            rejection_reason=row["rejection_reason"],
            requested_at=from_iso(row["requested_at"]),
            responded_at=from_iso(row["responded_at"]),
            approved_at=from_iso(row["approved_at"]),
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
            cancelled_at=from_iso(row["cancelled_at"]),
        )

    def _insert_history(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"bsh_{uuid4().hex[:10]}", booking_id, actor_user_id, from_status, to_status, note, to_iso(now)),
        )

    def insert_booking(self, booking: Booking) -> Booking:
        with self._lock:
            with self._connect() as conn:
                data = booking.model_dump()
                values = [to_iso(v) if isinstance(v, datetime) else v for v in (data[c] for c in _BOOKING_COLUMNS)]
                conn.execute(
                    f"INSERT INTO bookings ({', '.join(_BOOKING_COLUMNS)}) VALUES ({', '.join('?' for _ in _BOOKING_COLUMNS)})",
                    tuple(values),
                )
                self._insert_history(
                    conn,
                    booking.id,
                    booking.requester_id,
                    "none",
                    booking.status,
                    "booking requested",
                    booking.requested_at,
                )
                conn.commit()
        return booking

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._row_to_booking(row) if row else None

    def list_bookings(
        self,
        vertical: str,
        *,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        order_by: str = "requested_at DESC",
        limit: Optional[int] = None,
    ) -> List[Booking]:
        query = "SELECT * FROM bookings WHERE vertical = ?"
        params: List[Any] = [vertical]
        if user_id and role == "provider":
            query += " AND provider_id = ?"
            params.append(user_id)
        elif user_id and role == "requester":
            query += " AND requester_id = ?"
            params.append(user_id)
        elif user_id:
            query += " AND (provider_id = ? OR requester_id = ?)"
            params.extend([user_id, user_id])
        status_list = list(statuses or [])
        if status_list:
            query += f" AND status IN ({', '.join('?' for _ in status_list)})"
            params.extend(status_list)
        if order_by not in {"requested_at DESC", "window_start ASC"}:
            raise ValueError(f"Unsupported ordering: {order_by}")
        query += f" ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def find_overlapping(
        self,
        vertical: str,
        provider_id: str,
        statuses: Iterable[str],
        window_start: datetime,
        window_end: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        status_list = list(statuses)
        query = f"""
            SELECT * FROM bookings
            WHERE vertical = ? AND provider_id = ?
              AND status IN ({', '.join('?' for _ in status_list)})
              AND window_start < ? AND window_end > ?
        """
        params: List[Any] = [vertical, provider_id, *status_list, to_iso(window_end), to_iso(window_start)]
        if exclude_booking_id:
            query += " AND id != ?"
            params.append(exclude_booking_id)
        query += " ORDER BY window_start"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def apply_transition(
        self,
        booking_id: str,
        *,
        actor_user_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        now: datetime,
        write_once: Iterable[str] = (),
        set_if_unset: Iterable[str] = (),
        fields: Optional[Dict[str, Any]] = None,
        note: str = "",
        open_session: Optional[EngagementSession] = None,
        close_session_notes: Optional[str] = None,
    ) -> Booking:
        """Move a booking between statuses in a single compare-and-swap write.

        ``write_once`` columns must be NULL for the update to apply and are set
        to ``now``. ``set_if_unset`` columns keep an existing value. When no row
        matches, the booking either changed underneath the caller or already
        carries one of the write-once timestamps, and InvalidStateError is raised.
        """
        source = list(from_statuses)
        guarded = list(write_once)
        coalesced = list(set_if_unset)
        extra = dict(fields or {})
        for column in (*guarded, *coalesced, *extra):
            if column not in _TRANSITION_COLUMNS:
                raise ValueError(f"Transition cannot write column {column}")

        assignments = ["status = ?"]
        params: List[Any] = [to_status]
        for column in guarded:
            assignments.append(f"{column} = ?")
            params.append(to_iso(now))
        for column in coalesced:
            assignments.append(f"{column} = COALESCE({column}, ?)")
            params.append(to_iso(now))
        for column, value in extra.items():
            assignments.append(f"{column} = ?")
            params.append(value)

        conditions = [f"status IN ({', '.join('?' for _ in source)})"]
        conditions.extend(f"{column} IS NULL" for column in guarded)

        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT status FROM bookings WHERE id = ?", (booking_id,)).fetchone()
                if not row:
                    raise NotFoundError("Booking not found")
                current_status = str(row["status"])

                if open_session is not None:
                    active = conn.execute(
                        "SELECT id FROM engagement_sessions WHERE booking_id = ? AND ended_at IS NULL",
                        (booking_id,),
                    ).fetchone()
                    if active:
                        raise InvalidStateError("An active session already exists for this booking")
                active_session = None
                if close_session_notes is not None:
                    active_session = conn.execute(
                        "SELECT * FROM engagement_sessions WHERE booking_id = ? AND ended_at IS NULL",
                        (booking_id,),
                    ).fetchone()
                    if not active_session:
                        raise InvalidStateError("No active session for this booking")

                cursor = conn.execute(
                    f"UPDATE bookings SET {', '.join(assignments)} WHERE id = ? AND {' AND '.join(conditions)}",
                    (*params, booking_id, *source),
                )
                if cursor.rowcount == 0:
                    raise InvalidStateError(f"Booking cannot move from {current_status} to {to_status}")

                if open_session is not None:
                    conn.execute(
                        "INSERT INTO engagement_sessions (id, booking_id, started_at, notes) VALUES (?, ?, ?, ?)",
                        (open_session.id, booking_id, to_iso(open_session.started_at), open_session.notes),
                    )
                if active_session is not None:
                    started = from_iso(active_session["started_at"])
                    duration = max(0, int(round((now - started).total_seconds() / 60)))
                    conn.execute(
                        """
                        UPDATE engagement_sessions SET ended_at = ?, duration_minutes = ?, notes = ?
                        WHERE id = ?
                        """,
                        (
                            to_iso(now),
                            duration,
                            close_session_notes or active_session["notes"],
                            active_session["id"],
                        ),
                    )
                self._insert_history(conn, booking_id, actor_user_id, current_status, to_status, note, now)
                conn.commit()
                updated = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._row_to_booking(updated)

    def list_status_history(self, booking_id: str) -> List[Dict[str, str]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT actor_user_id, from_status, to_status, note, created_at
                    FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, rowid
                    """,
                    (booking_id,),
                ).fetchall()
        return [dict(row) for row in rows]

    def list_sessions(self, booking_id: str) -> List[EngagementSession]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM engagement_sessions WHERE booking_id = ? ORDER BY started_at",
                    (booking_id,),
                ).fetchall()
        return [
            EngagementSession(
                id=row["id"],
                booking_id=row["booking_id"],
                started_at=from_iso(row["started_at"]),
                ended_at=from_iso(row["ended_at"]),
                duration_minutes=row["duration_minutes"],
                notes=row["notes"] or "",
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Reviews

    def _row_to_review(self, row: sqlite3.Row) -> Review:
        return Review(
            id=row["id"],
            booking_id=row["booking_id"],
            vertical=row["vertical"],
            reviewer_id=row["reviewer_id"],
            reviewee_id=row["reviewee_id"],
            rating=int(row["rating"]),
            categories=_load_json(row["categories_json"], {}),
            comment=row["comment"] or "",
            is_public=bool(row["is_public"]),
            created_at=from_iso(row["created_at"]),
        )

    def insert_review(self, review: Review) -> Review:
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO reviews (
                            id, booking_id, vertical, reviewer_id, reviewee_id, rating,
                            categories_json, comment, is_public, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            review.id,
                            review.booking_id,
                            review.vertical,
                            review.reviewer_id,
                            review.reviewee_id,
                            review.rating,
                            json.dumps(review.categories),
                            review.comment,
                            1 if review.is_public else 0,
                            to_iso(review.created_at),
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise DuplicateReviewError("You have already reviewed this booking") from exc
                conn.commit()
        return review

    def find_review(self, booking_id: str, reviewer_id: str) -> Optional[Review]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM reviews WHERE booking_id = ? AND reviewer_id = ?",
                    (booking_id, reviewer_id),
                ).fetchone()
        return self._row_to_review(row) if row else None

    def list_reviews(self, vertical: str, user_id: str, *, kind: str = "received") -> List[Review]:
        column = "reviewer_id" if kind == "given" else "reviewee_id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM reviews WHERE vertical = ? AND {column} = ? ORDER BY created_at DESC",
                    (vertical, user_id),
                ).fetchall()
        return [self._row_to_review(row) for row in rows]

    def public_ratings(self, vertical: str, reviewee_id: str) -> List[int]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT rating FROM reviews WHERE vertical = ? AND reviewee_id = ? AND is_public = 1",
                    (vertical, reviewee_id),
                ).fetchall()
        return [int(row["rating"]) for row in rows]
