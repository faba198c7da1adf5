"""SQLite access layer for contracts, inboxes, the feedback ledger, and contract state stores."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np

from contract_inbox.models import (
    Contract,
    FeedbackAction,
    FeedbackEvent,
    HiddenMark,
    Inbox,
    InboxFilters,
    LearningPolicy,
    PersonalState,
    SavedState,
    SharedHiddenState,
)


_LOGGER = logging.getLogger(__name__)
_LEGACY_HIDDEN_KEYS = ("is_hidden", "hidden_by", "hidden_date", "hidden_reason")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode_vector(vector: Sequence[float] | None) -> tuple[bytes | None, int | None]:
    if not vector:
        return None, None
    array = np.asarray(vector, dtype=np.float32)
    return array.tobytes(), int(array.shape[0])


def _decode_vector(blob: bytes | None, dim: int | None, *, owner: str) -> list[float] | None:
    if blob is None or not dim:
        return None
    try:
        array = np.frombuffer(blob, dtype=np.float32)
    except ValueError:
        _LOGGER.warning("Discarding unreadable embedding for %s.", owner)
        return None
    if array.shape[0] != int(dim):
        _LOGGER.warning("Discarding partial embedding for %s (%d of %d values).", owner, array.shape[0], dim)
        return None
    return [float(value) for value in array]


def _migrate_hidden_payload(contract_id: str, raw: str | None) -> tuple[dict[str, Any], bool]:
    try:
        payload = json.loads(raw or "")
    except ValueError:
        _LOGGER.warning("Resetting unparseable hidden state for contract %s.", contract_id)
        return {"hidden_in_inboxes": [], "hidden_metadata": {}}, True
    if not isinstance(payload, dict):
        _LOGGER.warning("Resetting malformed hidden state for contract %s.", contract_id)
        return {"hidden_in_inboxes": [], "hidden_metadata": {}}, True
    if "hidden_in_inboxes" in payload:
        return payload, False

    # A global hidden flag cannot be attributed to any inbox, so it is cleared.
    legacy_keys = [key for key in _LEGACY_HIDDEN_KEYS if key in payload]
    _LOGGER.warning("Migrating legacy hidden state for contract %s (fields: %s).", contract_id, legacy_keys)
    return {"hidden_in_inboxes": [], "hidden_metadata": {}}, True


class InboxDB:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS contracts (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    authority TEXT NOT NULL DEFAULT '',
                    value REAL,
                    close_date TEXT,
                    publish_date TEXT,
                    url TEXT,
                    buyer_classification TEXT NOT NULL DEFAULT '',
                    embedding BLOB,
                    embedding_dim INTEGER,
                    embedding_text TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_contracts_authority ON contracts(authority);
                CREATE INDEX IF NOT EXISTS idx_contracts_classification ON contracts(buyer_classification);
                CREATE INDEX IF NOT EXISTS idx_contracts_close_date ON contracts(close_date);

                CREATE TABLE IF NOT EXISTS inboxes (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    embedding BLOB,
                    embedding_dim INTEGER,
                    is_all_contracts INTEGER NOT NULL DEFAULT 0,
                    filters TEXT,
                    learning_policy TEXT,
                    unread_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_inboxes_created ON inboxes(created_at);

                CREATE TABLE IF NOT EXISTS feedback_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    inbox_id TEXT NOT NULL,
                    contract_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    match_score REAL NOT NULL,
                    hide_reason TEXT,
                    view_duration REAL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_feedback_inbox ON feedback_events(inbox_id);
                CREATE INDEX IF NOT EXISTS idx_feedback_contract ON feedback_events(contract_id);
                CREATE INDEX IF NOT EXISTS idx_feedback_action ON feedback_events(action);

                CREATE TABLE IF NOT EXISTS contract_hidden_state (
                    contract_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS contract_saved_state (
                    contract_id TEXT PRIMARY KEY,
                    saved_by TEXT,
                    saved_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS contract_personal_state (
                    contract_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    is_unread INTEGER NOT NULL DEFAULT 1,
                    is_new INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (contract_id, user_id)
                );

                CREATE INDEX IF NOT EXISTS idx_personal_state_user ON contract_personal_state(user_id);
                """
            )

            self._ensure_column(conn, "inboxes", "prompt_refined_at", "TEXT")

    @staticmethod
    def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
        rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        return {str(row[1]) for row in rows}

    def _ensure_column(
        self,
        conn: sqlite3.Connection,
        table_name: str,
        column_name: str,
        declaration: str,
    ) -> None:
        existing = self._table_columns(conn, table_name)
        if column_name in existing:
            return
        conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {declaration}")

    # ---- contracts -------------------------------------------------------

    @staticmethod
    def _row_to_contract(row: sqlite3.Row) -> Contract:
        return Contract(
            id=row["id"],
            title=row["title"],
            description=row["description"] or "",
            authority=row["authority"] or "",
            value=row["value"],
            close_date=row["close_date"],
            publish_date=row["publish_date"],
            url=row["url"],
            buyer_classification=row["buyer_classification"] or "",
            embedding=_decode_vector(row["embedding"], row["embedding_dim"], owner=f"contract {row['id']}"),
        )

    def upsert_contracts(self, contracts: Iterable[Contract]) -> int:
        timestamp = _utc_now()
        payload: list[tuple[Any, ...]] = []
        for contract in contracts:
            blob, dim = _encode_vector(contract.embedding)
            payload.append(
                (
                    contract.id,
                    contract.title,
                    contract.description,
                    contract.authority,
                    contract.value,
                    contract.close_date,
                    contract.publish_date,
                    contract.url,
                    contract.buyer_classification,
                    blob,
                    dim,
                    contract.embedding_text() if blob is not None else None,
                    timestamp,
                )
            )

        with self._connect() as conn:
            # An upsert without a vector keeps the stored one.
            conn.executemany(
                """
                INSERT INTO contracts (
                    id, title, description, authority, value, close_date, publish_date,
                    url, buyer_classification, embedding, embedding_dim, embedding_text, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title=excluded.title,
                    description=excluded.description,
                    authority=excluded.authority,
                    value=excluded.value,
                    close_date=excluded.close_date,
                    publish_date=excluded.publish_date,
                    url=excluded.url,
                    buyer_classification=excluded.buyer_classification,
                    embedding=COALESCE(excluded.embedding, contracts.embedding),
                    embedding_dim=COALESCE(excluded.embedding_dim, contracts.embedding_dim),
                    embedding_text=COALESCE(excluded.embedding_text, contracts.embedding_text),
                    updated_at=excluded.updated_at
                """,
                payload,
            )
        return len(payload)

    def save_contract_embedding(self, contract_id: str, text: str, embedding: Sequence[float]) -> None:
        blob, dim = _encode_vector(embedding)
        if blob is None:
            raise ValueError("Embedding must be a non-empty vector.")
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE contracts
                SET embedding = ?, embedding_dim = ?, embedding_text = ?, updated_at = ?
                WHERE id = ?
                """,
                (blob, dim, text, _utc_now(), contract_id),
            )
        if cursor.rowcount == 0:
            raise KeyError("Contract not found.")

    def get_contract(self, contract_id: str) -> Contract | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM contracts WHERE id = ?", (contract_id,)).fetchone()
        return self._row_to_contract(row) if row else None

    def get_contracts(self, contract_ids: Iterable[str]) -> dict[str, Contract]:
        ids = sorted({str(value) for value in contract_ids})
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM contracts WHERE id IN ({placeholders})", ids).fetchall()
        return {row["id"]: self._row_to_contract(row) for row in rows}

    def list_contracts(self) -> list[Contract]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM contracts ORDER BY rowid ASC").fetchall()
        return [self._row_to_contract(row) for row in rows]

    def list_contracts_missing_embeddings(self) -> list[Contract]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM contracts WHERE embedding IS NULL ORDER BY rowid ASC"
            ).fetchall()
        return [self._row_to_contract(row) for row in rows]

    # ---- inboxes ---------------------------------------------------------

    @staticmethod
    def _row_to_inbox(row: sqlite3.Row) -> Inbox:
        inbox_id = row["id"]
        filters = InboxFilters()
        if row["filters"]:
            try:
                filters = InboxFilters.from_dict(json.loads(row["filters"]))
            except ValueError:
                _LOGGER.warning("Ignoring unreadable filters for inbox %s.", inbox_id)

        policy: LearningPolicy | None = None
        if row["learning_policy"]:
            try:
                parsed = json.loads(row["learning_policy"])
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                policy = LearningPolicy.from_dict(parsed, inbox_id=inbox_id)
            else:
                _LOGGER.warning("Ignoring unreadable learning policy for inbox %s.", inbox_id)

        return Inbox(
            id=inbox_id,
            name=row["name"],
            prompt=row["prompt"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            embedding=_decode_vector(row["embedding"], row["embedding_dim"], owner=f"inbox {inbox_id}"),
            is_all_contracts=bool(row["is_all_contracts"]),
            filters=filters,
            learning_policy=policy,
            unread_count=int(row["unread_count"] or 0),
            prompt_refined_at=row["prompt_refined_at"],
        )

    def create_inbox(self, inbox: Inbox) -> Inbox:
        blob, dim = _encode_vector(inbox.embedding)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO inboxes (
                    id, name, prompt, embedding, embedding_dim, is_all_contracts, filters,
                    learning_policy, unread_count, created_at, updated_at, prompt_refined_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    inbox.id,
                    inbox.name,
                    inbox.prompt,
                    blob,
                    dim,
                    1 if inbox.is_all_contracts else 0,
                    json.dumps(inbox.filters.to_dict()),
                    json.dumps(inbox.learning_policy.to_dict(), sort_keys=True) if inbox.learning_policy else None,
                    inbox.unread_count,
                    inbox.created_at,
                    inbox.updated_at,
                    inbox.prompt_refined_at,
                ),
            )
        return inbox

    def get_inbox(self, inbox_id: str) -> Inbox | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM inboxes WHERE id = ?", (inbox_id,)).fetchone()
        return self._row_to_inbox(row) if row else None

    def list_inboxes(self) -> list[Inbox]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM inboxes ORDER BY created_at ASC, rowid ASC").fetchall()
        return [self._row_to_inbox(row) for row in rows]

    def find_all_contracts_inbox(self) -> Inbox | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM inboxes WHERE is_all_contracts = 1 ORDER BY created_at ASC LIMIT 1"
            ).fetchone()
        return self._row_to_inbox(row) if row else None

    def update_inbox_config(
        self,
        inbox_id: str,
        *,
        name: str,
        prompt: str,
        filters: InboxFilters,
        embedding: Sequence[float] | None,
        prompt_refined_at: str | None,
    ) -> None:
        blob, dim = _encode_vector(embedding)
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE inboxes
                SET name = ?, prompt = ?, filters = ?, embedding = ?, embedding_dim = ?,
                    prompt_refined_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (name, prompt, json.dumps(filters.to_dict()), blob, dim, prompt_refined_at, _utc_now(), inbox_id),
            )

    def save_inbox_embedding(self, inbox_id: str, embedding: Sequence[float]) -> None:
        blob, dim = _encode_vector(embedding)
        with self._connect() as conn:
            conn.execute(
                "UPDATE inboxes SET embedding = ?, embedding_dim = ?, updated_at = ? WHERE id = ?",
                (blob, dim, _utc_now(), inbox_id),
            )

    def save_learning_policy(self, inbox_id: str, policy: LearningPolicy) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE inboxes SET learning_policy = ?, updated_at = ? WHERE id = ?",
                (json.dumps(policy.to_dict(), sort_keys=True), _utc_now(), inbox_id),
            )

    def update_unread_count(self, inbox_id: str, count: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE inboxes SET unread_count = ? WHERE id = ?",
                (max(0, int(count)), inbox_id),
            )

    def delete_inbox(self, inbox_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM inboxes WHERE id = ?", (inbox_id,))
        return cursor.rowcount > 0

    # ---- feedback ledger -------------------------------------------------

    @staticmethod
    def _row_to_feedback(row: sqlite3.Row) -> FeedbackEvent:
        return FeedbackEvent(
            id=row["id"],
            inbox_id=row["inbox_id"],
            contract_id=row["contract_id"],
            action=FeedbackAction.parse(row["action"]),
            match_score=float(row["match_score"]),
            created_at=row["created_at"],
            hide_reason=row["hide_reason"],
            view_duration=row["view_duration"],
        )

    def append_feedback(self, event: FeedbackEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO feedback_events (
                    id, inbox_id, contract_id, action, match_score, hide_reason, view_duration, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.inbox_id,
                    event.contract_id,
                    event.action.value,
                    event.match_score,
                    event.hide_reason,
                    event.view_duration,
                    event.created_at,
                ),
            )

    def list_feedback(self, inbox_id: str) -> list[FeedbackEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM feedback_events WHERE inbox_id = ? ORDER BY seq ASC",
                (inbox_id,),
            ).fetchall()
        return [self._row_to_feedback(row) for row in rows]

    def clear_inbox_feedback(self, inbox_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM feedback_events WHERE inbox_id = ?", (inbox_id,))
        return cursor.rowcount

    # ---- shared hidden state (per contract, keyed by inbox inside) ------

    def _load_hidden_state(self, conn: sqlite3.Connection, contract_id: str) -> SharedHiddenState:
        row = conn.execute(
            "SELECT payload FROM contract_hidden_state WHERE contract_id = ?",
            (contract_id,),
        ).fetchone()
        if not row:
            return SharedHiddenState(contract_id=contract_id)
        payload, migrated = _migrate_hidden_payload(contract_id, row["payload"])
        state = SharedHiddenState.from_dict(contract_id, payload)
        if migrated:
            self._write_hidden_state(conn, state)
        return state

    @staticmethod
    def _write_hidden_state(conn: sqlite3.Connection, state: SharedHiddenState) -> None:
        conn.execute(
            """
            INSERT INTO contract_hidden_state (contract_id, payload, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(contract_id) DO UPDATE SET
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (state.contract_id, json.dumps(state.to_dict(), sort_keys=True), _utc_now()),
        )

    def get_hidden_state(self, contract_id: str) -> SharedHiddenState:
        with self._connect() as conn:
            return self._load_hidden_state(conn, contract_id)

    def hide_in_inbox(self, contract_id: str, inbox_id: str, mark: HiddenMark) -> SharedHiddenState:
        with self._connect() as conn:
            # Take the write lock before reading so concurrent marks on one contract serialise.
            conn.execute("BEGIN IMMEDIATE")
            state = self._load_hidden_state(conn, contract_id)
            state.hide(inbox_id, mark)
            self._write_hidden_state(conn, state)
        return state

    def restore_in_inbox(self, contract_id: str, inbox_id: str) -> SharedHiddenState:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            state = self._load_hidden_state(conn, contract_id)
            state.restore(inbox_id)
            self._write_hidden_state(conn, state)
        return state

    def list_hidden_states(self) -> dict[str, SharedHiddenState]:
        with self._connect() as conn:
            rows = conn.execute("SELECT contract_id, payload FROM contract_hidden_state").fetchall()
            states: dict[str, SharedHiddenState] = {}
            for row in rows:
                contract_id = row["contract_id"]
                payload, migrated = _migrate_hidden_payload(contract_id, row["payload"])
                state = SharedHiddenState.from_dict(contract_id, payload)
                if migrated:
                    self._write_hidden_state(conn, state)
                states[contract_id] = state
        return states

    def hidden_contract_ids(self, inbox_id: str) -> set[str]:
        return {
            contract_id
            for contract_id, state in self.list_hidden_states().items()
            if state.is_hidden_in(inbox_id)
        }

    def remove_inbox_from_hidden_states(self, inbox_id: str) -> int:
        changed = 0
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute("SELECT contract_id, payload FROM contract_hidden_state").fetchall()
            for row in rows:
                payload, _migrated = _migrate_hidden_payload(row["contract_id"], row["payload"])
                state = SharedHiddenState.from_dict(row["contract_id"], payload)
                if not state.is_hidden_in(inbox_id) and inbox_id not in state.hidden_metadata:
                    continue
                state.restore(inbox_id)
                self._write_hidden_state(conn, state)
                changed += 1
        return changed

    # ---- shared saved state (global per contract) ------------------------

    def get_saved_state(self, contract_id: str) -> SavedState | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT contract_id, saved_by, saved_at FROM contract_saved_state WHERE contract_id = ?",
                (contract_id,),
            ).fetchone()
        if not row:
            return None
        return SavedState(contract_id=row["contract_id"], saved_at=row["saved_at"], saved_by=row["saved_by"])

    def set_saved(self, contract_id: str, *, saved_by: str | None) -> SavedState:
        timestamp = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO contract_saved_state (contract_id, saved_by, saved_at)
                VALUES (?, ?, ?)
                ON CONFLICT(contract_id) DO NOTHING
                """,
                (contract_id, saved_by, timestamp),
            )
        state = self.get_saved_state(contract_id)
        return state or SavedState(contract_id=contract_id, saved_at=timestamp, saved_by=saved_by)

    def clear_saved(self, contract_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM contract_saved_state WHERE contract_id = ?", (contract_id,))
        return cursor.rowcount > 0

    # ---- personal state (per contract and user) --------------------------

    def get_personal_state(self, contract_id: str, user_id: str) -> PersonalState:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT contract_id, user_id, is_unread, is_new
                FROM contract_personal_state
                WHERE contract_id = ? AND user_id = ?
                """,
                (contract_id, user_id),
            ).fetchone()
        if not row:
            return PersonalState(contract_id=contract_id, user_id=user_id)
        return PersonalState(
            contract_id=row["contract_id"],
            user_id=row["user_id"],
            is_unread=bool(row["is_unread"]),
            is_new=bool(row["is_new"]),
        )

    def save_personal_state(self, state: PersonalState) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO contract_personal_state (contract_id, user_id, is_unread, is_new, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(contract_id, user_id) DO UPDATE SET
                    is_unread = excluded.is_unread,
                    is_new = excluded.is_new,
                    updated_at = excluded.updated_at
                """,
                (state.contract_id, state.user_id, int(state.is_unread), int(state.is_new), _utc_now()),
            )

    def read_contract_ids(self, user_id: str) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT contract_id FROM contract_personal_state WHERE user_id = ? AND is_unread = 0",
                (user_id,),
            ).fetchall()
        return {str(row["contract_id"]) for row in rows}

    def stats(self) -> dict[str, Any]:
        with self._connect() as conn:
            counts = conn.execute(
                """
                SELECT
                  (SELECT COUNT(*) FROM contracts) AS contract_count,
                  (SELECT COUNT(*) FROM contracts WHERE embedding IS NOT NULL) AS embedding_count,
                  (SELECT COUNT(*) FROM inboxes) AS inbox_count,
                  (SELECT COUNT(*) FROM feedback_events) AS feedback_count,
                  (SELECT COUNT(*) FROM contract_saved_state) AS saved_count
                """
            ).fetchone()
        return (
            dict(counts)
            if counts
            else {
                "contract_count": 0,
                "embedding_count": 0,
                "inbox_count": 0,
                "feedback_count": 0,
                "saved_count": 0,
            }
        )
