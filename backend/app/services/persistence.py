from __future__ import annotations

import hashlib
import json
import secrets
import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

from app.core.config import settings

_BACKEND_ROOT = Path(__file__).resolve().parents[2]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _db_path() -> Path:
    path = Path(settings.sqlite_path).expanduser()
    if not path.is_absolute():
        # Resolve relative DB paths against backend root, not process cwd.
        path = (_BACKEND_ROOT / path).resolve()

    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _connect() -> sqlite3.Connection:
    db_path = _db_path()

    try:
        conn = sqlite3.connect(str(db_path), timeout=30)
    except sqlite3.OperationalError as exc:
        raise sqlite3.OperationalError(
            f"unable to open sqlite database at '{db_path}': {exc}"
        ) from exc

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 30000")

    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        # Fallback for filesystems/environments where WAL sidecar files are blocked.
        conn.execute("PRAGMA journal_mode = DELETE")

    return conn


def init_db() -> None:
    with _connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS profiles (
                user_id INTEGER PRIMARY KEY,
                ml_access_token TEXT,
                ml_user_id TEXT,
                ml_nickname TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
                CHECK (
                    (ml_access_token IS NULL AND ml_user_id IS NULL AND ml_nickname IS NULL)
                    OR (ml_access_token IS NOT NULL AND ml_user_id IS NOT NULL AND ml_nickname IS NOT NULL)
                )
            );

            CREATE TABLE IF NOT EXISTS oauth_states (
                scope TEXT PRIMARY KEY,
                nonce TEXT NOT NULL,
                redirect_uri TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS competitive_monitoring (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                ml_listing_id TEXT NOT NULL,
                product_title TEXT NOT NULL,
                user_price REAL NOT NULL,
                user_sold_quantity INTEGER NOT NULL,
                user_shipping_free INTEGER NOT NULL,
                user_delivery_days INTEGER NOT NULL,
                analysis_data TEXT NOT NULL,
                ai_suggestions TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
                UNIQUE(user_id, ml_listing_id)
            );

            CREATE TABLE IF NOT EXISTS competitor_data (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                monitoring_id INTEGER NOT NULL,
                competitor_listing_id TEXT NOT NULL,
                competitor_title TEXT NOT NULL,
                price REAL NOT NULL,
                sold_quantity INTEGER NOT NULL,
                delivery_days INTEGER NOT NULL,
                shipping_free INTEGER NOT NULL,
                reputation_level TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(monitoring_id) REFERENCES competitive_monitoring(id) ON DELETE CASCADE,
                UNIQUE(monitoring_id, competitor_listing_id)
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id);
            CREATE INDEX IF NOT EXISTS idx_monitoring_user_updated ON competitive_monitoring(user_id, updated_at DESC);
            CREATE INDEX IF NOT EXISTS idx_competitor_data_monitoring ON competitor_data(monitoring_id);
            """
        )


def get_db_readiness() -> dict:
    db_path = _db_path()

    try:
        init_db()
        with _connect() as conn:
            conn.execute("SELECT 1").fetchone()
    except sqlite3.OperationalError as exc:
        return {
            "ok": False,
            "status": "degraded",
            "reason": f"sqlite_operational_error: {exc}",
            "sqlite_path": str(db_path),
        }
    except Exception as exc:  # noqa: BLE001
        return {
            "ok": False,
            "status": "degraded",
            "reason": f"db_check_failed: {exc}",
            "sqlite_path": str(db_path),
        }

    return {
        "ok": True,
        "status": "ok",
        "reason": None,
        "sqlite_path": str(db_path),
    }


def _hash_password(password: str, salt_hex: str | None = None) -> str:
    salt = bytes.fromhex(salt_hex) if salt_hex else secrets.token_bytes(16)
    derived = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        settings.password_iterations,
    )
    return f"{salt.hex()}${derived.hex()}"


def _verify_password(password: str, stored: str) -> bool:
    try:
        salt_hex, expected_hash = stored.split("$", 1)
    except ValueError:
        return False

    calculated = _hash_password(password, salt_hex=salt_hex)
    return secrets.compare_digest(calculated.split("$", 1)[1], expected_hash)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user(email: str, password: str) -> dict | None:
    normalized = _normalize_email(email)
    if not normalized or len(password) < 6:
        return None

    now = _now_iso()
    pw_hash = _hash_password(password)

    try:
        with _connect() as conn:
            cursor = conn.execute(
                "INSERT INTO users(email, password_hash, created_at) VALUES (?, ?, ?)",
                (normalized, pw_hash, now),
            )
            user_id = int(cursor.lastrowid)
    except sqlite3.IntegrityError:
        return None

    return {"id": user_id, "email": normalized}


def authenticate_user(email: str, password: str) -> dict | None:
    normalized = _normalize_email(email)

    with _connect() as conn:
        row = conn.execute(
            "SELECT id, email, password_hash FROM users WHERE email = ?",
            (normalized,),
        ).fetchone()

    if not row:
        return None
    if not _verify_password(password, row["password_hash"]):
        return None

    return {"id": int(row["id"]), "email": str(row["email"])}


def get_or_create_user_by_email(email: str) -> dict | None:
    normalized = _normalize_email(email)
    if not normalized:
        return None

    with _connect() as conn:
        row = conn.execute(
            "SELECT id, email FROM users WHERE email = ?",
            (normalized,),
        ).fetchone()
        if row:
            return {"id": int(row["id"]), "email": str(row["email"])}

        # External-auth users do not use local password login.
        placeholder_password = secrets.token_urlsafe(32)
        pw_hash = _hash_password(placeholder_password)
        now = _now_iso()

        cursor = conn.execute(
            "INSERT INTO users(email, password_hash, created_at) VALUES (?, ?, ?)",
            (normalized, pw_hash, now),
        )

    return {"id": int(cursor.lastrowid), "email": normalized}


def create_session(user_id: int) -> tuple[str, str]:
    token = secrets.token_urlsafe(32)
    now = datetime.now(UTC)
    expires = now + timedelta(hours=settings.session_ttl_hours)

    with _connect() as conn:
        conn.execute(
            "INSERT INTO sessions(token, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
            (token, user_id, now.isoformat(), expires.isoformat()),
        )

    return token, expires.isoformat()


def delete_session(token: str) -> None:
    with _connect() as conn:
        conn.execute("DELETE FROM sessions WHERE token = ?", (token,))


def get_user_by_token(token: str | None) -> dict | None:
    if not token:
        return None

    now = datetime.now(UTC).isoformat()

    with _connect() as conn:
        row = conn.execute(
            """
            SELECT u.id AS id, u.email AS email
            FROM sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.token = ? AND s.expires_at >= ?
            """,
            (token, now),
        ).fetchone()

        # lightweight cleanup of expired sessions
        conn.execute("DELETE FROM sessions WHERE expires_at < ?", (now,))

    if not row:
        return None

    return {"id": int(row["id"]), "email": str(row["email"])}


# --- Linked marketplace identity -------------------------------------------


def _linked_identity_from_row(row: sqlite3.Row | None) -> dict:
    if row is None:
        return {"ml_access_token": None, "ml_user_id": None, "ml_nickname": None}

    return {
        "ml_access_token": row["ml_access_token"],
        "ml_user_id": row["ml_user_id"],
        "ml_nickname": row["ml_nickname"],
    }


def get_linked_identity(user_id: int) -> dict:
    with _connect() as conn:
        row = conn.execute(
            "SELECT ml_access_token, ml_user_id, ml_nickname FROM profiles WHERE user_id = ?",
            (user_id,),
        ).fetchone()

    return _linked_identity_from_row(row)


def set_linked_identity(
    user_id: int,
    *,
    access_token: str,
    ml_user_id: str,
    ml_nickname: str,
) -> dict:
    """Write the three identity fields in one statement.

    The table CHECK constraint rejects any mixed state, so a failed write
    leaves the previous identity untouched.
    """
    if not access_token or not ml_user_id or not ml_nickname:
        raise ValueError("linked identity requires access token, user id and nickname")

    now = _now_iso()

    with _connect() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO profiles(user_id, created_at, updated_at) VALUES (?, ?, ?)",
            (user_id, now, now),
        )
        conn.execute(
            """
            UPDATE profiles
            SET ml_access_token = ?, ml_user_id = ?, ml_nickname = ?, updated_at = ?
            WHERE user_id = ?
            """,
            (access_token, ml_user_id, ml_nickname, now, user_id),
        )
        row = conn.execute(
            "SELECT ml_access_token, ml_user_id, ml_nickname FROM profiles WHERE user_id = ?",
            (user_id,),
        ).fetchone()

    return _linked_identity_from_row(row)


def clear_linked_identity(user_id: int) -> None:
    with _connect() as conn:
        conn.execute(
            """
            UPDATE profiles
            SET ml_access_token = NULL, ml_user_id = NULL, ml_nickname = NULL, updated_at = ?
            WHERE user_id = ?
            """,
            (_now_iso(), user_id),
        )


# --- OAuth anti-forgery state ----------------------------------------------


def save_oauth_state(*, scope: str, nonce: str, redirect_uri: str) -> None:
    with _connect() as conn:
        conn.execute(
            """
            INSERT INTO oauth_states(scope, nonce, redirect_uri, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(scope) DO UPDATE SET
                nonce = excluded.nonce,
                redirect_uri = excluded.redirect_uri,
                created_at = excluded.created_at
            """,
            (scope, nonce, redirect_uri, _now_iso()),
        )


def consume_oauth_state(scope: str) -> dict | None:
    with _connect() as conn:
        row = conn.execute(
            "SELECT nonce, redirect_uri, created_at FROM oauth_states WHERE scope = ?",
            (scope,),
        ).fetchone()
        if row is None:
            return None

        # Only the caller whose delete hits the row gets to see the nonce.
        cursor = conn.execute(
            "DELETE FROM oauth_states WHERE scope = ? AND nonce = ?",
            (scope, row["nonce"]),
        )

    if cursor.rowcount == 0:
        return None

    return {
        "nonce": str(row["nonce"]),
        "redirect_uri": str(row["redirect_uri"]),
        "created_at": str(row["created_at"]),
    }


# --- Competitive monitoring -------------------------------------------------


def _competitor_from_row(row: sqlite3.Row) -> dict:
    return {
        "id": int(row["id"]),
        "monitoring_id": int(row["monitoring_id"]),
        "competitor_listing_id": str(row["competitor_listing_id"]),
        "competitor_title": str(row["competitor_title"]),
        "price": float(row["price"]),
        "sold_quantity": int(row["sold_quantity"]),
        "delivery_days": int(row["delivery_days"]),
        "shipping_free": bool(row["shipping_free"]),
        "reputation_level": str(row["reputation_level"]),
        "updated_at": str(row["updated_at"]),
    }


def _snapshot_from_row(row: sqlite3.Row, competitors: list[dict]) -> dict:
    try:
        analysis_data = json.loads(row["analysis_data"] or "{}")
    except json.JSONDecodeError:
        analysis_data = {}

    return {
        "id": int(row["id"]),
        "user_id": int(row["user_id"]),
        "ml_listing_id": str(row["ml_listing_id"]),
        "product_title": str(row["product_title"]),
        "user_price": float(row["user_price"]),
        "user_sold_quantity": int(row["user_sold_quantity"]),
        "user_shipping_free": bool(row["user_shipping_free"]),
        "user_delivery_days": int(row["user_delivery_days"]),
        "analysis_data": analysis_data,
        "ai_suggestions": row["ai_suggestions"],
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
        "competitors": competitors,
    }


def _competitors_for(conn: sqlite3.Connection, monitoring_ids: list[int]) -> dict[int, list[dict]]:
    grouped: dict[int, list[dict]] = {mid: [] for mid in monitoring_ids}
    if not monitoring_ids:
        return grouped

    placeholders = ",".join("?" for _ in monitoring_ids)
    rows = conn.execute(
        f"""
        SELECT id, monitoring_id, competitor_listing_id, competitor_title, price, sold_quantity,
               delivery_days, shipping_free, reputation_level, updated_at
        FROM competitor_data
        WHERE monitoring_id IN ({placeholders})
        ORDER BY monitoring_id, id
        """,
        tuple(monitoring_ids),
    ).fetchall()

    for row in rows:
        grouped[int(row["monitoring_id"])].append(_competitor_from_row(row))
    return grouped


def save_competitive_snapshot(
    *,
    user_id: int,
    ml_listing_id: str,
    product_title: str,
    user_price: float,
    user_sold_quantity: int,
    user_shipping_free: bool,
    user_delivery_days: int,
    competitors: list[dict],
) -> dict:
    """Upsert the snapshot for (user, listing) and replace its competitor rows.

    Snapshot fields are fully overwritten on conflict. Competitor rows are
    upserted by (snapshot, competitor listing id); rows for competitors that
    dropped out of the new set are deleted in the same transaction.
    """
    now = _now_iso()
    analysis_data = json.dumps({"competitors": competitors}, ensure_ascii=False, sort_keys=True)

    with _connect() as conn:
        existing = conn.execute(
            "SELECT id FROM competitive_monitoring WHERE user_id = ? AND ml_listing_id = ?",
            (user_id, ml_listing_id),
        ).fetchone()

        if existing:
            monitoring_id = int(existing["id"])
            conn.execute(
                """
                UPDATE competitive_monitoring
                SET product_title = ?, user_price = ?, user_sold_quantity = ?, user_shipping_free = ?,
                    user_delivery_days = ?, analysis_data = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    product_title,
                    float(user_price),
                    int(user_sold_quantity),
                    1 if user_shipping_free else 0,
                    int(user_delivery_days),
                    analysis_data,
                    now,
                    monitoring_id,
                ),
            )
        else:
            cursor = conn.execute(
                """
                INSERT INTO competitive_monitoring(
                    user_id, ml_listing_id, product_title, user_price, user_sold_quantity,
                    user_shipping_free, user_delivery_days, analysis_data, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    ml_listing_id,
                    product_title,
                    float(user_price),
                    int(user_sold_quantity),
                    1 if user_shipping_free else 0,
                    int(user_delivery_days),
                    analysis_data,
                    now,
                    now,
                ),
            )
            monitoring_id = int(cursor.lastrowid)

        keep_ids = [str(c["listing_id"]) for c in competitors]
        if keep_ids:
            placeholders = ",".join("?" for _ in keep_ids)
            conn.execute(
                f"""
                DELETE FROM competitor_data
                WHERE monitoring_id = ? AND competitor_listing_id NOT IN ({placeholders})
                """,
                (monitoring_id, *keep_ids),
            )
        else:
            conn.execute("DELETE FROM competitor_data WHERE monitoring_id = ?", (monitoring_id,))

        for competitor in competitors:
            values = (
                str(competitor["title"]),
                float(competitor["price"]),
                int(competitor["sold_quantity"]),
                int(competitor["delivery_days"]),
                1 if competitor["shipping_free"] else 0,
                str(competitor["reputation_level"]),
                now,
            )
            cursor = conn.execute(
                """
                UPDATE competitor_data
                SET competitor_title = ?, price = ?, sold_quantity = ?, delivery_days = ?,
                    shipping_free = ?, reputation_level = ?, updated_at = ?
                WHERE monitoring_id = ? AND competitor_listing_id = ?
                """,
                (*values, monitoring_id, str(competitor["listing_id"])),
            )
            if cursor.rowcount == 0:
                conn.execute(
                    """
                    INSERT INTO competitor_data(
                        monitoring_id, competitor_listing_id, competitor_title, price, sold_quantity,
                        delivery_days, shipping_free, reputation_level, updated_at, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (monitoring_id, str(competitor["listing_id"]), *values, now),
                )

        row = conn.execute(
            "SELECT * FROM competitive_monitoring WHERE id = ?",
            (monitoring_id,),
        ).fetchone()
        grouped = _competitors_for(conn, [monitoring_id])

    if row is None:
        raise RuntimeError("competitive snapshot not found after upsert")

    return _snapshot_from_row(row, grouped[monitoring_id])


def update_snapshot_suggestions(monitoring_id: int, ai_suggestions: str) -> None:
    with _connect() as conn:
        conn.execute(
            "UPDATE competitive_monitoring SET ai_suggestions = ?, updated_at = ? WHERE id = ?",
            (ai_suggestions, _now_iso(), monitoring_id),
        )


def get_competitive_snapshot(user_id: int, ml_listing_id: str) -> dict | None:
    with _connect() as conn:
        row = conn.execute(
            "SELECT * FROM competitive_monitoring WHERE user_id = ? AND ml_listing_id = ?",
            (user_id, ml_listing_id),
        ).fetchone()
        if row is None:
            return None
        grouped = _competitors_for(conn, [int(row["id"])])

    return _snapshot_from_row(row, grouped[int(row["id"])])


def list_competitive_snapshots(user_id: int, *, limit: int = 50, offset: int = 0) -> list[dict]:
    with _connect() as conn:
        rows = conn.execute(
            """
            SELECT *
            FROM competitive_monitoring
            WHERE user_id = ?
            ORDER BY updated_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, max(1, int(limit)), max(0, int(offset))),
        ).fetchall()
        grouped = _competitors_for(conn, [int(r["id"]) for r in rows])

    return [_snapshot_from_row(r, grouped[int(r["id"])]) for r in rows]
