from __future__ import annotations

import io
import csv
import json
import logging
import os
import re
import smtplib
import sqlite3
import threading
import time
import hashlib
import hmac
import base64
import secrets
import urllib.request
import urllib.error
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from openai import OpenAI
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

try:
    import psycopg2  # type: ignore
    from psycopg2.extras import RealDictCursor  # type: ignore
except Exception:  # pragma: no cover - optional dependency at runtime
    psycopg2 = None
    RealDictCursor = None

load_dotenv()

TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
logger = logging.getLogger("kpilibrary.backend")


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY_ENV_VALUES


def env_int(name: str, default: int, lower: int, upper: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        logger.warning("%s=%r is not an integer. Falling back to %s.", name, raw, default)
        value = default
    return max(lower, min(upper, value))


DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
]


def parse_cors_origins(value: str | None) -> list[str]:
    if not value:
        return DEFAULT_CORS_ORIGINS
    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    return origins or DEFAULT_CORS_ORIGINS


app = FastAPI(title="KPI Library Backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=parse_cors_origins(os.getenv("CORS_ALLOW_ORIGINS")),
    allow_origin_regex=os.getenv("CORS_ALLOW_ORIGIN_REGEX"),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

openai_api_key = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = (os.getenv("OPENAI_MODEL") or "gpt-4o-mini").strip()
configured_fallback_models = [model.strip() for model in (os.getenv("OPENAI_FALLBACK_MODELS") or "").split(",") if model.strip()]
if configured_fallback_models:
    OPENAI_FALLBACK_MODELS = configured_fallback_models
else:
    OPENAI_FALLBACK_MODELS = [model for model in ["gpt-4.1-mini", "gpt-4o-mini"] if model != OPENAI_MODEL]
OPENAI_TEMPERATURE = 0.4
client = OpenAI(api_key=openai_api_key) if openai_api_key else None

if client is None:
    logger.warning("OPENAI_API_KEY is missing. KPI generation requests will be rejected.")


def resolve_db_path() -> str:
    explicit = (os.getenv("KPI_DB_PATH") or "").strip()
    if explicit:
        return explicit
    if os.path.isdir("/var/data"):
        return "/var/data/kpilibrary.db"
    return os.path.join(os.path.dirname(__file__), "data", "kpilibrary.db")


def normalize_database_url(value: str | None) -> str:
    raw = (value or "").strip()
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    return raw


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL"))
DB_BACKEND = "postgres" if DATABASE_URL.startswith("postgresql://") else "sqlite"
DB_PATH = resolve_db_path()
AUTH_TOKEN_SECRET = (os.getenv("AUTH_TOKEN_SECRET") or "replace-this-in-production").strip()
AUTH_TOKEN_TTL_HOURS = env_int("AUTH_TOKEN_TTL_HOURS", 720, 1, 24 * 365)
INVITE_TOKEN_TTL_HOURS = env_int("INVITE_TOKEN_TTL_HOURS", 72, 1, 24 * 30)
ADMIN_API_KEYS = {
    key.strip()
    for key in (os.getenv("ADMIN_API_KEYS") or os.getenv("ADMIN_API_KEY") or "").split(",")
    if key.strip()
}
APP_BASE_URL = (os.getenv("APP_BASE_URL") or "http://localhost:3000").strip().rstrip("/")
if AUTH_TOKEN_SECRET == "replace-this-in-production":
    logger.warning("AUTH_TOKEN_SECRET is using a default value. Set AUTH_TOKEN_SECRET in production.")
if DB_BACKEND == "postgres":
    if psycopg2 is None or RealDictCursor is None:
        logger.error("DATABASE_URL is set but psycopg2 is unavailable. Install psycopg2-binary.")
    logger.info("Using external Postgres database.")
else:
    logger.info("Using database path: %s", DB_PATH)

APP_TIMEZONE = (os.getenv("APP_TIMEZONE") or "Asia/Jakarta").strip()
try:
    APP_TZ: Any = ZoneInfo(APP_TIMEZONE)
except (ZoneInfoNotFoundError, ValueError):
    logger.warning("APP_TIMEZONE %r is unknown. Daily resets will follow UTC.", APP_TIMEZONE)
    APP_TZ = timezone.utc

DAILY_FREE_TOKENS = env_int("DAILY_FREE_TOKENS", 5, 0, 1000)
INVITE_DEFAULT_TOKENS = env_int("INVITE_DEFAULT_TOKENS", 10, 0, 10000)
KPI_GENERATION_TOKEN_COST = env_int("KPI_GENERATION_TOKEN_COST", 1, 1, 100)
BATCH_MAX_ROLES = env_int("BATCH_MAX_ROLES", 50, 1, 500)
BATCH_MAX_TASKS_PER_ROLE = env_int("BATCH_MAX_TASKS_PER_ROLE", 40, 1, 200)
INVITE_RESEND_DAILY_LIMIT = env_int("INVITE_RESEND_DAILY_LIMIT", 3, 1, 50)
ALLOW_UNVERIFIED_TOPUP = env_flag("ALLOW_UNVERIFIED_TOPUP", False)
KPI_OUTPUT_LANGUAGE = (os.getenv("KPI_OUTPUT_LANGUAGE") or "Bahasa Indonesia").strip()

MAYAR_WEBHOOK_SECRET = (os.getenv("MAYAR_WEBHOOK_SECRET") or "").strip()
MAYAR_PRICE_PER_TOKEN = env_int("MAYAR_PRICE_PER_TOKEN", 9500, 1, 10_000_000)
MAYAR_PAYMENT_URL = (os.getenv("MAYAR_PAYMENT_URL") or "").strip()
MAYAR_PRODUCT_ID = (os.getenv("MAYAR_PRODUCT_ID") or "").strip()
if not MAYAR_WEBHOOK_SECRET:
    logger.warning("MAYAR_WEBHOOK_SECRET is missing. Payment webhooks will be rejected.")

EMAIL_SMTP_HOST = (os.getenv("EMAIL_SMTP_HOST") or "").strip()
EMAIL_SMTP_PORT = env_int("EMAIL_SMTP_PORT", 587, 1, 65535)
EMAIL_SMTP_USERNAME = (os.getenv("EMAIL_SMTP_USERNAME") or "").strip()
EMAIL_SMTP_PASSWORD = (os.getenv("EMAIL_SMTP_PASSWORD") or "").strip()
EMAIL_SMTP_FROM = (os.getenv("EMAIL_SMTP_FROM") or EMAIL_SMTP_USERNAME).strip()
EMAIL_FROM_NAME = (os.getenv("EMAIL_FROM_NAME") or "Library KPI").strip()
EMAIL_SMTP_USE_TLS = env_flag("EMAIL_SMTP_USE_TLS", True)
EMAIL_SMTP_USE_SSL = env_flag("EMAIL_SMTP_USE_SSL", False)
EMAIL_TIMEOUT_SECONDS = env_int("EMAIL_TIMEOUT_SECONDS", 12, 5, 30)
SMTP_EMAIL_SENDING_ENABLED = bool(EMAIL_SMTP_HOST and EMAIL_SMTP_USERNAME and EMAIL_SMTP_PASSWORD and EMAIL_SMTP_FROM)
RESEND_API_KEY = (os.getenv("RESEND_API_KEY") or "").strip()
RESEND_FROM = (os.getenv("RESEND_FROM") or EMAIL_SMTP_FROM).strip()
RESEND_EMAIL_SENDING_ENABLED = bool(RESEND_API_KEY and RESEND_FROM)
EMAIL_PROVIDER = (os.getenv("EMAIL_PROVIDER") or "auto").strip().lower()

DB_LOCK = threading.Lock()

TRANSACTION_TYPES = ("DAILY_RESET", "PURCHASE", "SPEND", "ADMIN_ADJUST")
USER_ROLES = ("admin", "user")
MAYAR_PAID_STATUSES = {"PAID", "SETTLED", "SUCCESS", "PAID_SUCCESS", "COMPLETED"}
ROLE_HEADER_ALIASES = {"role", "jabatan"}
TASK_HEADER_ALIASES = {"tugas", "task", "tasks"}


def new_kpi_id() -> str:
    return secrets.token_hex(6)


KPI_TEXT_FIELDS = (
    "job_description",
    "perspective",
    "kpi_name",
    "type",
    "detail",
    "polarity",
    "unit",
    "definition",
    "data_source",
    "formula",
    "measurement",
    "target_audience",
    "measurement_challenges",
)


class KPIItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_kpi_id)
    job_description: str = Field("", validation_alias=AliasChoices("job_description", "jobDescription"))
    perspective: str = ""
    kpi_name: str = Field("", validation_alias=AliasChoices("kpi_name", "kpiName", "name"))
    type: str = ""
    detail: str = ""
    polarity: str = ""
    unit: str = ""
    definition: str = ""
    data_source: str = Field("", validation_alias=AliasChoices("data_source", "dataSource"))
    formula: str = ""
    measurement: str = ""
    target_audience: str = Field("", validation_alias=AliasChoices("target_audience", "targetAudience"))
    measurement_challenges: str = Field(
        "", validation_alias=AliasChoices("measurement_challenges", "measurementChallenges")
    )
    task: str | None = None

    @field_validator(*KPI_TEXT_FIELDS, mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return str(value).strip()

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        return text or new_kpi_id()

    @field_validator("task", mode="before")
    @classmethod
    def coerce_task(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class LoginRequest(BaseModel):
    email: str
    password: str


class AcceptInviteRequest(BaseModel):
    token: str
    password: str


class TopupRequest(BaseModel):
    tokens: int


class GenerateKPIRequest(BaseModel):
    job_description: str


class BatchGenerateRequest(BaseModel):
    csv_text: str
    save_to_library: bool = True


class LibrarySaveRequest(BaseModel):
    job_title: str
    kpis: list[KPIItem]


class LibraryUpdateRequest(BaseModel):
    kpis: list[KPIItem]


class AdminCreateUserRequest(BaseModel):
    email: str
    full_name: str | None = None
    tokens: int | None = None


class AdminResendInviteRequest(BaseModel):
    email: str


class AdminTokensUpdateRequest(BaseModel):
    free_tokens: int
    paid_tokens: int


class AdminRoleUpdateRequest(BaseModel):
    role: str


class AdminEmailRequest(BaseModel):
    to: list[str] | str
    subject: str
    body: str
    type: str = "notification"


def clamp_float(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def safe_text(value: str | None) -> str:
    return (value or "").strip()


def collapse_whitespace(value: str | None) -> str:
    return re.sub(r"\s+", " ", safe_text(value))


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def local_today() -> str:
    return datetime.now(APP_TZ).date().isoformat()


def parse_iso_datetime(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except Exception:
        return datetime.now(timezone.utc) - timedelta(days=3650)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def local_date_of(value: str) -> str:
    return parse_iso_datetime(value).astimezone(APP_TZ).date().isoformat()


def b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("utf-8").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padding = "=" * ((4 - (len(value) % 4)) % 4)
    return base64.urlsafe_b64decode(value + padding)


def compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def parse_meta_json(meta_json: Any) -> Any:
    try:
        return json.loads(meta_json or "{}")
    except Exception:
        return {}


DB_INTEGRITY_ERRORS: tuple[type[Exception], ...] = (sqlite3.IntegrityError,)
if psycopg2 is not None:
    DB_INTEGRITY_ERRORS = DB_INTEGRITY_ERRORS + (psycopg2.IntegrityError,)


def adapt_query_for_backend(query: str, params: Any = None) -> tuple[str, Any]:
    if DB_BACKEND != "postgres" or params is None:
        return query, params
    converted_query = query.replace("?", "%s")
    if isinstance(params, list):
        return converted_query, tuple(params)
    return converted_query, params


class DBCursor:
    def __init__(self, raw_cursor: Any):
        self._raw_cursor = raw_cursor

    def execute(self, query: str, params: Any = None) -> "DBCursor":
        converted_query, converted_params = adapt_query_for_backend(query, params)
        if converted_params is None:
            self._raw_cursor.execute(converted_query)
        else:
            self._raw_cursor.execute(converted_query, converted_params)
        return self

    def fetchone(self) -> Any:
        return self._raw_cursor.fetchone()

    def fetchall(self) -> list[Any]:
        return self._raw_cursor.fetchall()

    def close(self) -> None:
        self._raw_cursor.close()

    @property
    def rowcount(self) -> int:
        return int(getattr(self._raw_cursor, "rowcount", 0))

    @property
    def lastrowid(self) -> Any:
        return getattr(self._raw_cursor, "lastrowid", None)


class DBConnection:
    def __init__(self, raw_connection: Any):
        self._raw_connection = raw_connection

    def cursor(self) -> DBCursor:
        if DB_BACKEND == "postgres":
            if RealDictCursor is None:
                raise RuntimeError("RealDictCursor unavailable while DATABASE_URL is configured.")
            return DBCursor(self._raw_connection.cursor(cursor_factory=RealDictCursor))
        return DBCursor(self._raw_connection.cursor())

    def execute(self, query: str, params: Any = None) -> DBCursor:
        cursor = self.cursor()
        cursor.execute(query, params)
        return cursor

    def commit(self) -> None:
        self._raw_connection.commit()

    def rollback(self) -> None:
        self._raw_connection.rollback()

    def close(self) -> None:
        self._raw_connection.close()

    def __enter__(self) -> "DBConnection":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()


def db_connection() -> DBConnection:
    if DB_BACKEND == "postgres":
        if psycopg2 is None:
            raise RuntimeError("DATABASE_URL is configured but psycopg2 is not installed.")
        return DBConnection(psycopg2.connect(DATABASE_URL, connect_timeout=10))
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    raw_connection = sqlite3.connect(DB_PATH, timeout=15, check_same_thread=False)
    raw_connection.row_factory = sqlite3.Row
    return DBConnection(raw_connection)


def begin_write_transaction(cursor: DBCursor) -> None:
    if DB_BACKEND == "postgres":
        cursor.execute("BEGIN")
        return
    cursor.execute("BEGIN IMMEDIATE")


def inserted_row_id(connection: DBConnection, cursor: DBCursor) -> int:
    raw_id = cursor.lastrowid
    if raw_id not in (None, "", 0):
        return int(raw_id)
    if DB_BACKEND == "postgres":
        row = connection.execute("SELECT LASTVAL() AS id").fetchone()
        if row and row["id"] is not None:
            return int(row["id"])
    raise RuntimeError("Unable to determine inserted row id for the current transaction.")


def schema_statements() -> list[str]:
    if DB_BACKEND == "postgres":
        pk = "BIGSERIAL PRIMARY KEY"
        ref = "BIGINT"
    else:
        pk = "INTEGER PRIMARY KEY AUTOINCREMENT"
        ref = "INTEGER"
    return [
        f"""
        CREATE TABLE IF NOT EXISTS users (
            id {pk},
            full_name TEXT NOT NULL DEFAULT '',
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            password_salt TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'user',
            status TEXT NOT NULL DEFAULT 'active',
            free_tokens INTEGER NOT NULL DEFAULT 0,
            paid_tokens INTEGER NOT NULL DEFAULT 0,
            last_reset_date TEXT NOT NULL DEFAULT '',
            mayar_customer_id TEXT,
            resend_count INTEGER NOT NULL DEFAULT 0,
            last_resend_at TEXT,
            last_login_at TEXT,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS token_transactions (
            id {pk},
            user_id {ref} NOT NULL REFERENCES users (id),
            type TEXT NOT NULL,
            amount INTEGER NOT NULL,
            description TEXT NOT NULL,
            free_after INTEGER NOT NULL,
            paid_after INTEGER NOT NULL,
            external_ref TEXT,
            meta_json TEXT,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS library_entries (
            id {pk},
            user_id {ref} NOT NULL REFERENCES users (id),
            job_title TEXT NOT NULL,
            title_key TEXT NOT NULL,
            kpi_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS analytics_events (
            id {pk},
            user_id {ref} REFERENCES users (id),
            event_type TEXT NOT NULL,
            event_name TEXT NOT NULL,
            meta_json TEXT,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS webhook_events (
            id {pk},
            provider TEXT NOT NULL,
            event_type TEXT NOT NULL DEFAULT '',
            external_id TEXT,
            customer_id TEXT,
            customer_email TEXT,
            user_id {ref},
            signature_present INTEGER NOT NULL DEFAULT 0,
            signature_valid INTEGER,
            http_status INTEGER,
            processed INTEGER,
            result TEXT NOT NULL,
            error_message TEXT,
            payload_json TEXT,
            headers_json TEXT,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS email_logs (
            id {pk},
            recipient TEXT NOT NULL,
            subject TEXT NOT NULL,
            template_type TEXT NOT NULL,
            status TEXT NOT NULL,
            error_message TEXT,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_token_tx_external_ref ON token_transactions (external_ref)",
        "CREATE INDEX IF NOT EXISTS idx_token_tx_user_time ON token_transactions (user_id, created_at)",
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_library_user_title ON library_entries (user_id, title_key)",
        "CREATE INDEX IF NOT EXISTS idx_events_user_time ON analytics_events (user_id, created_at)",
        "CREATE INDEX IF NOT EXISTS idx_webhook_events_time ON webhook_events (created_at)",
    ]


def init_db() -> None:
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            for statement in schema_statements():
                cursor.execute(statement)
            connection.commit()
        finally:
            connection.close()


init_db()


USER_COLUMNS = (
    "id, full_name, email, password_hash, password_salt, role, status, free_tokens, paid_tokens, "
    "last_reset_date, mayar_customer_id, resend_count, last_resend_at, last_login_at, created_at"
)


def normalize_email(value: str | None) -> str:
    return safe_text(value).lower()


def valid_email(value: str) -> bool:
    return bool(re.fullmatch(r"[^@\s]+@[^@\s]+\.[^@\s]+", value))


def display_name_from_email(email: str) -> str:
    local = normalize_email(email).split("@", 1)[0]
    cleaned = re.sub(r"\s+", " ", re.sub(r"[^a-z0-9]+", " ", local)).strip()
    if not cleaned:
        return "User"
    return " ".join(part.capitalize() for part in cleaned.split(" ")[:3])


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), 190_000).hex()


def fetch_user_by_email(email: str) -> Any:
    connection = db_connection()
    try:
        return connection.execute(f"SELECT {USER_COLUMNS} FROM users WHERE email = ?", (normalize_email(email),)).fetchone()
    finally:
        connection.close()


def fetch_user_by_id(user_id: int) -> Any:
    connection = db_connection()
    try:
        return connection.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (int(user_id),)).fetchone()
    finally:
        connection.close()


def user_payload(user_row: Any) -> dict[str, Any]:
    return {
        "id": int(user_row["id"]),
        "name": safe_text(user_row["full_name"]) or display_name_from_email(str(user_row["email"])),
        "email": str(user_row["email"]),
        "role": safe_text(user_row["role"]) or "user",
        "status": safe_text(user_row["status"]) or "active",
        "created_at": str(user_row["created_at"]),
    }


def create_user_account(
    email: str,
    password: str | None,
    full_name: str = "",
    role: str = "user",
    status: str = "active",
    free_tokens: int | None = None,
    paid_tokens: int = 0,
) -> Any:
    """Insert a user row and return it.

    ``password=None`` stores a random secret nobody knows, which is how invited
    accounts stay locked until the invite is accepted. Initial token grants are
    logged as ADMIN_ADJUST so the ledger history starts from zero.
    """
    normalized = normalize_email(email)
    if not valid_email(normalized):
        raise HTTPException(status_code=400, detail="Enter a valid email address.")
    if role not in USER_ROLES:
        raise HTTPException(status_code=400, detail="Role must be 'admin' or 'user'.")
    salt = secrets.token_hex(16)
    password_hash = hash_password(password if password is not None else secrets.token_urlsafe(32), salt)
    free = max(0, int(DAILY_FREE_TOKENS if free_tokens is None else free_tokens))
    paid = max(0, int(paid_tokens))
    name = collapse_whitespace(full_name) or display_name_from_email(normalized)

    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            try:
                cursor.execute(
                    """
                    INSERT INTO users (full_name, email, password_hash, password_salt, role, status,
                                       free_tokens, paid_tokens, last_reset_date, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (name, normalized, password_hash, salt, role, status, free, paid, local_today(), now_utc_iso()),
                )
            except DB_INTEGRITY_ERRORS as exc:
                connection.rollback()
                raise HTTPException(status_code=409, detail="An account with this email already exists.") from exc
            user_id = inserted_row_id(connection, cursor)
            if free or paid:
                insert_token_transaction(
                    connection,
                    cursor,
                    user_id,
                    "ADMIN_ADJUST",
                    free + paid,
                    "Initial token allocation",
                    free,
                    paid,
                    meta={"free_delta": free, "paid_delta": paid, "source": status},
                )
            connection.commit()
        finally:
            connection.close()

    user = fetch_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=500, detail="Unable to create account.")
    return user


def create_auth_token(user_id: int, email: str, purpose: str = "session", ttl_hours: int | None = None) -> str:
    hours = AUTH_TOKEN_TTL_HOURS if ttl_hours is None else ttl_hours
    payload = {
        "uid": user_id,
        "email": normalize_email(email),
        "purpose": purpose,
        "exp": int(time.time()) + max(1, hours) * 3600,
    }
    payload_b64 = b64url_encode(compact_json(payload).encode("utf-8"))
    signature = hmac.new(AUTH_TOKEN_SECRET.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return f"{payload_b64}.{b64url_encode(signature)}"


def decode_auth_token(token: str, purpose: str = "session") -> dict[str, Any]:
    parts = safe_text(token).split(".")
    if len(parts) != 2:
        raise HTTPException(status_code=401, detail="Invalid authentication token.")

    payload_b64, signature_b64 = parts
    expected = hmac.new(AUTH_TOKEN_SECRET.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    try:
        provided = b64url_decode(signature_b64)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token signature.") from exc
    if not hmac.compare_digest(expected, provided):
        raise HTTPException(status_code=401, detail="Invalid authentication token signature.")

    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token payload.") from exc

    if safe_text(str(payload.get("purpose", ""))) != purpose:
        raise HTTPException(status_code=401, detail="Authentication token cannot be used here.")
    if int(payload.get("exp", 0)) < int(time.time()):
        raise HTTPException(status_code=401, detail="Authentication token expired. Please log in again.")
    return payload


def extract_bearer_token(request: Request) -> str | None:
    auth_header = safe_text(request.headers.get("authorization"))
    if auth_header.lower().startswith("bearer "):
        return safe_text(auth_header[7:])
    return None


def require_authenticated_user(request: Request) -> Any:
    token = safe_text(extract_bearer_token(request))
    if not token:
        raise HTTPException(status_code=401, detail="Login required. Please sign in to continue.")

    payload = decode_auth_token(token)
    user = fetch_user_by_id(int(payload.get("uid", 0)))
    if not user:
        raise HTTPException(status_code=401, detail="Account not found. Please log in again.")
    if normalize_email(str(user["email"])) != normalize_email(str(payload.get("email", ""))):
        raise HTTPException(status_code=401, detail="Invalid authentication token.")
    if safe_text(user["status"]) != "active":
        raise HTTPException(status_code=401, detail="Account is not active yet. Accept your invitation first.")
    return user


def require_admin_access(request: Request) -> str:
    header_key = safe_text(request.headers.get("x-admin-key"))
    if header_key:
        if header_key in ADMIN_API_KEYS:
            return "api_key"
        raise HTTPException(status_code=401, detail="Admin authentication failed.")

    if not extract_bearer_token(request):
        if not ADMIN_API_KEYS:
            raise HTTPException(status_code=401, detail="Admin login required.")
        raise HTTPException(status_code=401, detail="Admin authentication failed.")
    user = require_authenticated_user(request)
    if safe_text(user["role"]) != "admin":
        raise HTTPException(status_code=403, detail="Admin role required.")
    return f"user:{int(user['id'])}"


def log_analytics_event(
    event_type: str,
    event_name: str,
    user_id: int | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                """
                INSERT INTO analytics_events (user_id, event_type, event_name, meta_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, safe_text(event_type) or "system", safe_text(event_name) or "event", compact_json(meta or {}), now_utc_iso()),
            )
            connection.commit()
        except Exception:
            logger.exception("Unable to record analytics event %s/%s", event_type, event_name)
            connection.rollback()
        finally:
            connection.close()


# Email dispatch


def send_email_message_smtp(to_email: str, subject: str, text_body: str) -> str | None:
    if not SMTP_EMAIL_SENDING_ENABLED:
        return "SMTP email settings are missing."

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"{EMAIL_FROM_NAME} <{EMAIL_SMTP_FROM}>"
    msg["To"] = normalize_email(to_email)
    msg.set_content(text_body)

    try:
        if EMAIL_SMTP_PORT == 465 or EMAIL_SMTP_USE_SSL:
            with smtplib.SMTP_SSL(EMAIL_SMTP_HOST, EMAIL_SMTP_PORT, timeout=EMAIL_TIMEOUT_SECONDS) as server:
                server.login(EMAIL_SMTP_USERNAME, EMAIL_SMTP_PASSWORD)
                server.send_message(msg)
        else:
            with smtplib.SMTP(EMAIL_SMTP_HOST, EMAIL_SMTP_PORT, timeout=EMAIL_TIMEOUT_SECONDS) as server:
                if EMAIL_SMTP_USE_TLS:
                    server.starttls()
                server.login(EMAIL_SMTP_USERNAME, EMAIL_SMTP_PASSWORD)
                server.send_message(msg)
        return None
    except smtplib.SMTPAuthenticationError:
        logger.exception("SMTP auth failed for %s", EMAIL_SMTP_USERNAME)
        return "SMTP authentication failed."
    except (smtplib.SMTPException, OSError):
        logger.exception("SMTP delivery to %s failed", to_email)
        return "SMTP delivery failed. Check host, port and TLS settings."


def send_email_message_resend(to_email: str, subject: str, text_body: str) -> str | None:
    if not RESEND_EMAIL_SENDING_ENABLED:
        return "Resend email settings are missing."
    req = urllib.request.Request(
        "https://api.resend.com/emails",
        data=json.dumps(
            {
                "from": f"{EMAIL_FROM_NAME} <{RESEND_FROM}>",
                "to": [normalize_email(to_email)],
                "subject": subject,
                "text": text_body,
            }
        ).encode("utf-8"),
        method="POST",
        headers={
            "Authorization": f"Bearer {RESEND_API_KEY}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=EMAIL_TIMEOUT_SECONDS) as resp:
            status_code = int(resp.getcode() or 0)
            if status_code >= 400:
                return f"Resend API rejected the request (HTTP {status_code})."
        return None
    except urllib.error.HTTPError as exc:
        logger.exception("Resend HTTP error while sending email to %s", to_email)
        try:
            details = exc.read().decode("utf-8", errors="ignore")
        except Exception:
            details = ""
        message = safe_text(str(parse_meta_json(details).get("message") or "")) if details.startswith("{") else ""
        return f"Resend API error ({exc.code}): {message or details[:200]}".strip()
    except (urllib.error.URLError, TimeoutError):
        logger.exception("Resend network error while sending email to %s", to_email)
        return "Resend network error."


def send_email_message(to_email: str, subject: str, text_body: str) -> str | None:
    if EMAIL_PROVIDER == "smtp":
        provider_sequence = ["smtp", "resend"]
    elif EMAIL_PROVIDER == "resend":
        provider_sequence = ["resend", "smtp"]
    else:
        provider_sequence = []
        if RESEND_EMAIL_SENDING_ENABLED:
            provider_sequence.append("resend")
        if SMTP_EMAIL_SENDING_ENABLED:
            provider_sequence.append("smtp")
    if not provider_sequence:
        logger.warning("Email sending is not configured. Unable to send email to %s", to_email)
        return "Email settings are missing. Configure RESEND_API_KEY/RESEND_FROM or SMTP settings."

    errors: list[str] = []
    for provider in provider_sequence:
        sender = send_email_message_resend if provider == "resend" else send_email_message_smtp
        error = sender(to_email, subject, text_body)
        if not error:
            return None
        errors.append(f"{provider.upper()}: {error}")
    return " | ".join(errors)


def record_email_log(recipient: str, subject: str, template_type: str, error: str | None) -> None:
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                """
                INSERT INTO email_logs (recipient, subject, template_type, status, error_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (recipient, subject, template_type, "failed" if error else "sent", error, now_utc_iso()),
            )
            connection.commit()
        finally:
            connection.close()


def invite_link(token: str) -> str:
    return f"{APP_BASE_URL}/#/set-password?token={token}"


def send_invite_email(user_row: Any) -> str | None:
    token = create_auth_token(int(user_row["id"]), str(user_row["email"]), purpose="invite", ttl_hours=INVITE_TOKEN_TTL_HOURS)
    name = safe_text(user_row["full_name"]) or "there"
    subject = "You're invited to Library KPI"
    error = send_email_message(
        str(user_row["email"]),
        subject,
        (
            f"Hi {name},\n\n"
            "You have been invited to Library KPI.\n"
            f"Set your password to activate the account: {invite_link(token)}\n\n"
            f"This link expires in {INVITE_TOKEN_TTL_HOURS} hours."
        ),
    )
    record_email_log(str(user_row["email"]), subject, "invite", error)
    return error


# Token ledger


def wallet_payload(free_tokens: int, paid_tokens: int, last_reset_date: str) -> dict[str, Any]:
    free = max(0, int(free_tokens))
    paid = max(0, int(paid_tokens))
    return {
        "free_tokens": free,
        "paid_tokens": paid,
        "total": free + paid,
        "last_reset_date": last_reset_date,
        "daily_free_tokens": DAILY_FREE_TOKENS,
        "pricing": {"kpi_generation": KPI_GENERATION_TOKEN_COST},
    }


def token_error(wallet: dict[str, Any], message: str, status_code: int = 402) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"message": message, "wallet": wallet})


def insert_token_transaction(
    connection: DBConnection,
    cursor: DBCursor,
    user_id: int,
    tx_type: str,
    amount: int,
    description: str,
    free_after: int,
    paid_after: int,
    external_ref: str | None = None,
    meta: dict[str, Any] | None = None,
) -> int:
    if tx_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown token transaction type: {tx_type}")
    cursor.execute(
        """
        INSERT INTO token_transactions
        (user_id, type, amount, description, free_after, paid_after, external_ref, meta_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, tx_type, int(amount), description, int(free_after), int(paid_after), external_ref, compact_json(meta or {}), now_utc_iso()),
    )
    return inserted_row_id(connection, cursor)


def select_token_row(cursor: DBCursor, user_id: int) -> Any:
    return cursor.execute(
        "SELECT id, email, free_tokens, paid_tokens, last_reset_date FROM users WHERE id = ?",
        (user_id,),
    ).fetchone()


def apply_daily_reset(connection: DBConnection, cursor: DBCursor, token_row: Any, today: str) -> tuple[int, int]:
    """Refill the free pool once per local day; paid tokens are never touched."""
    free_tokens = max(0, int(token_row["free_tokens"] or 0))
    paid_tokens = max(0, int(token_row["paid_tokens"] or 0))
    if safe_text(token_row["last_reset_date"]) == today:
        return free_tokens, paid_tokens

    user_id = int(token_row["id"])
    cursor.execute(
        "UPDATE users SET free_tokens = ?, last_reset_date = ? WHERE id = ?",
        (DAILY_FREE_TOKENS, today, user_id),
    )
    delta = DAILY_FREE_TOKENS - free_tokens
    if delta:
        insert_token_transaction(
            connection,
            cursor,
            user_id,
            "DAILY_RESET",
            delta,
            f"Daily free tokens reset to {DAILY_FREE_TOKENS}",
            DAILY_FREE_TOKENS,
            paid_tokens,
            meta={"date": today, "previous_free": free_tokens},
        )
    return DAILY_FREE_TOKENS, paid_tokens


def load_wallet(user_id: int) -> dict[str, Any]:
    today = local_today()
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            token_row = select_token_row(cursor, user_id)
            if not token_row:
                connection.rollback()
                raise HTTPException(status_code=404, detail="Account not found.")
            free_tokens, paid_tokens = apply_daily_reset(connection, cursor, token_row, today)
            connection.commit()
        finally:
            connection.close()
    return wallet_payload(free_tokens, paid_tokens, today)


def ensure_tokens_available(user_id: int, amount: int) -> dict[str, Any]:
    wallet = load_wallet(user_id)
    if wallet["total"] < amount:
        raise token_error(wallet, f"Insufficient tokens. This action needs {amount} token(s).")
    return wallet


def debit_tokens(user_id: int, amount: int, description: str, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    if amount <= 0:
        raise ValueError("Debit amount must be positive.")
    today = local_today()
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            token_row = select_token_row(cursor, user_id)
            if not token_row:
                connection.rollback()
                raise HTTPException(status_code=404, detail="Account not found.")

            free_tokens, paid_tokens = apply_daily_reset(connection, cursor, token_row, today)
            if free_tokens + paid_tokens < amount:
                # The reset is independent of the spend and stays committed.
                connection.commit()
                raise token_error(
                    wallet_payload(free_tokens, paid_tokens, today),
                    f"Insufficient tokens. This action needs {amount} token(s).",
                )

            from_free = min(free_tokens, amount)
            from_paid = amount - from_free
            free_after = free_tokens - from_free
            paid_after = paid_tokens - from_paid
            cursor.execute(
                "UPDATE users SET free_tokens = ?, paid_tokens = ? WHERE id = ?",
                (free_after, paid_after, user_id),
            )
            transaction_id = insert_token_transaction(
                connection,
                cursor,
                user_id,
                "SPEND",
                -amount,
                description,
                free_after,
                paid_after,
                meta={**(meta or {}), "from_free": from_free, "from_paid": from_paid},
            )
            connection.commit()
        finally:
            connection.close()

    logger.info("User %s spent %s token(s): %s", user_id, amount, description)
    return {"transaction_id": transaction_id, "wallet": wallet_payload(free_after, paid_after, today)}


def credit_tokens(
    user_id: int,
    amount: int,
    description: str,
    tx_type: str = "PURCHASE",
    external_ref: str | None = None,
    meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Credit amount must be positive.")
    today = local_today()
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            if external_ref:
                existing = cursor.execute(
                    "SELECT id FROM token_transactions WHERE external_ref = ? LIMIT 1",
                    (external_ref,),
                ).fetchone()
                if existing:
                    connection.rollback()
                    logger.info("Ignoring duplicate token credit %s", external_ref)
                    return {"transaction_id": int(existing["id"]), "wallet": None, "duplicate": True}

            token_row = select_token_row(cursor, user_id)
            if not token_row:
                connection.rollback()
                raise HTTPException(status_code=404, detail="Account not found.")
            free_tokens, paid_tokens = apply_daily_reset(connection, cursor, token_row, today)
            paid_after = paid_tokens + int(amount)
            cursor.execute("UPDATE users SET paid_tokens = ? WHERE id = ?", (paid_after, user_id))
            try:
                transaction_id = insert_token_transaction(
                    connection,
                    cursor,
                    user_id,
                    tx_type,
                    int(amount),
                    description,
                    free_tokens,
                    paid_after,
                    external_ref=external_ref,
                    meta=meta,
                )
            except DB_INTEGRITY_ERRORS:
                connection.rollback()
                logger.info("Concurrent duplicate token credit %s", external_ref)
                return {"transaction_id": None, "wallet": None, "duplicate": True}
            connection.commit()
        finally:
            connection.close()

    logger.info("User %s credited %s paid token(s): %s", user_id, amount, description)
    return {"transaction_id": transaction_id, "wallet": wallet_payload(free_tokens, paid_after, today), "duplicate": False}


def set_tokens(user_id: int, free_tokens: int, paid_tokens: int, actor: str) -> dict[str, Any]:
    today = local_today()
    target_free = max(0, int(free_tokens))
    target_paid = max(0, int(paid_tokens))
    transaction_id = None
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            token_row = select_token_row(cursor, user_id)
            if not token_row:
                connection.rollback()
                raise HTTPException(status_code=404, detail="User not found.")
            current_free, current_paid = apply_daily_reset(connection, cursor, token_row, today)
            cursor.execute(
                "UPDATE users SET free_tokens = ?, paid_tokens = ? WHERE id = ?",
                (target_free, target_paid, user_id),
            )
            free_delta = target_free - current_free
            paid_delta = target_paid - current_paid
            if free_delta or paid_delta:
                transaction_id = insert_token_transaction(
                    connection,
                    cursor,
                    user_id,
                    "ADMIN_ADJUST",
                    free_delta + paid_delta,
                    f"Admin set balance to {target_free} free / {target_paid} paid",
                    target_free,
                    target_paid,
                    meta={"free_delta": free_delta, "paid_delta": paid_delta, "actor": actor},
                )
            connection.commit()
        finally:
            connection.close()
    return {"transaction_id": transaction_id, "wallet": wallet_payload(target_free, target_paid, today)}


def token_transaction_payload(row: Any) -> dict[str, Any]:
    return {
        "id": int(row["id"]),
        "user_id": int(row["user_id"]),
        "type": str(row["type"]),
        "amount": int(row["amount"]),
        "description": str(row["description"]),
        "free_after": int(row["free_after"]),
        "paid_after": int(row["paid_after"]),
        "external_ref": row["external_ref"],
        "meta": parse_meta_json(row["meta_json"]),
        "created_at": str(row["created_at"]),
    }


def fetch_token_history(user_id: int | None, limit: int) -> list[dict[str, Any]]:
    query = "SELECT id, user_id, type, amount, description, free_after, paid_after, external_ref, meta_json, created_at FROM token_transactions"
    params: tuple[Any, ...] = ()
    if user_id is not None:
        query += " WHERE user_id = ?"
        params = (int(user_id),)
    query += " ORDER BY id DESC LIMIT ?"
    connection = db_connection()
    try:
        rows = connection.execute(query, params + (int(limit),)).fetchall()
    finally:
        connection.close()
    return [token_transaction_payload(row) for row in rows]


# KPI generation


class KPIGenerationError(Exception):
    pass


KPI_FIELD_GUIDE = {
    "perspective": "Balanced Scorecard perspective (Financial, Customer, Internal Process, Learning & Growth)",
    "kpi_name": "name of the key performance indicator",
    "type": "KPI type: Outcome, Output or Activity",
    "detail": "short explanation of the KPI, linked to the related task when there is one",
    "polarity": "Maximize (higher is better) or Minimize (lower is better)",
    "unit": "unit of measurement (%, currency, count, ratio, ...)",
    "definition": "operational definition of the KPI",
    "data_source": "where the data for tracking can come from",
    "formula": "example calculation formula",
    "measurement": "measurement frequency or method (monthly, yearly, ...)",
    "target_audience": "stakeholders most interested in this KPI",
    "measurement_challenges": "potential difficulty, bias or technical obstacles in measuring this KPI accurately",
}

KPI_SYSTEM_PROMPT = (
    "You are an expert HR consultant who designs KPI libraries based on the Balanced Scorecard. "
    "Always answer with a single JSON object and nothing else."
)


def kpi_output_contract() -> str:
    lines = "\n".join(f'- "{key}": {description}' for key, description in KPI_FIELD_GUIDE.items())
    return (
        f"Write every text value in {KPI_OUTPUT_LANGUAGE}, in a professional tone.\n"
        'Return a JSON object of the form {"kpis": [ ... ]} where every KPI object has these keys:\n'
        f"{lines}"
    )


def build_kpi_prompt(job_description: str, task_count: int | None = None) -> str:
    if task_count is None:
        return f"""
Design a comprehensive list of Key Performance Indicators for this job description / role: "{job_description}".

Make sure the KPIs cover all 4 Balanced Scorecard perspectives (Financial, Customer, Internal Process, Learning & Growth).

For every KPI give an in-depth analysis covering:
1. The standard KPI details (definition, formula, data source).
2. Target audience: the main stakeholders of this metric.
3. Measurement challenges: potential difficulties, bias or technical obstacles in measuring it accurately.

{kpi_output_contract()}
""".strip()
    return f"""
Below are the "Tasks and Responsibilities" of a role:

{job_description}

MANDATORY RULES:
1. For EVERY task listed above, formulate EXACTLY 2 (TWO) distinct KPIs.
2. Do not summarize or merge tasks. {task_count} task(s) must produce {task_count * 2} KPIs.
3. Map each KPI to the most relevant Balanced Scorecard perspective (Financial, Customer, Internal Process, Learning & Growth).
4. Add a "task" key holding the task text the KPI measures.

For every KPI include the name, definition, formula, unit, target audience and measurement challenges.

{kpi_output_contract()}
""".strip()


def build_task_job_description(role: str, tasks: list[str]) -> str:
    task_lines = "\n".join(f"{index}. {task}" for index, task in enumerate(tasks, start=1))
    return f"Role: {role}\nTasks and responsibilities:\n{task_lines}"


def extract_llm_text(message_content: Any) -> str:
    if isinstance(message_content, str):
        return safe_text(message_content)
    if isinstance(message_content, list):
        parts: list[str] = []
        for item in message_content:
            if isinstance(item, str):
                parts.append(item)
                continue
            text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
            if isinstance(text, str):
                parts.append(text)
        return safe_text("\n".join(parts))
    return safe_text(str(message_content or ""))


def is_transient_openai_error(exc: Exception) -> bool:
    return type(exc).__name__ in {"APIConnectionError", "APITimeoutError", "InternalServerError", "RateLimitError"}


def parse_kpi_payload(text: str, job_description: str) -> list[dict[str, Any]]:
    """Turn a model response into validated KPI dicts.

    Accepts ``{"kpis": [...]}``, any object holding a single list, a bare list,
    and responses wrapped in markdown code fences.
    """
    cleaned = safe_text(text)
    fenced = re.search(r"```(?:json)?\s*(.*?)```", cleaned, flags=re.DOTALL)
    if fenced:
        cleaned = fenced.group(1).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValueError("model response is not valid JSON") from exc

    if isinstance(data, dict):
        items = data.get("kpis")
        if not isinstance(items, list):
            items = next((value for value in data.values() if isinstance(value, list)), None)
    else:
        items = data
    if not isinstance(items, list):
        raise ValueError("model response does not contain a KPI list")

    kpis: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        kpi = KPIItem.model_validate({**item, "id": None})
        if not kpi.kpi_name:
            continue
        kpi.job_description = job_description
        kpis.append(kpi.model_dump())
    if not kpis:
        raise ValueError("model response contained no usable KPIs")
    return kpis


def generate_kpis(job_description: str, role: str | None = None, task_count: int | None = None) -> list[dict[str, Any]]:
    """Ask the LLM for KPIs, walking the model fallback chain.

    ``role`` switches to task mode: the prompt carries the task list and every
    KPI is labelled with the role name instead of the raw description.
    """
    if client is None:
        raise KPIGenerationError("LLM not configured")

    prompt = build_kpi_prompt(job_description, task_count if role else None)
    label = role or job_description
    models: list[str] = []
    for model in [OPENAI_MODEL, *OPENAI_FALLBACK_MODELS]:
        if model and model not in models:
            models.append(model)

    last_error = "no model attempted"
    for model in models:
        for attempt in range(3):
            try:
                response = client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": KPI_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=OPENAI_TEMPERATURE,
                    response_format={"type": "json_object"},
                )
            except Exception as exc:
                last_error = f"{type(exc).__name__} on model {model}"
                logger.exception("OpenAI request failed for model '%s' (attempt %s).", model, attempt + 1)
                if attempt < 2 and is_transient_openai_error(exc):
                    time.sleep(0.35 * (attempt + 1))
                    continue
                break

            content = extract_llm_text(response.choices[0].message.content if response.choices else "")
            try:
                kpis = parse_kpi_payload(content, label)
            except ValueError as exc:
                last_error = f"{exc} (model {model})"
                logger.error("Unusable KPI response from model '%s': %s", model, exc)
                break
            if task_count and len(kpis) != task_count * 2:
                logger.warning("Model '%s' returned %s KPIs for %s task(s) of %s.", model, len(kpis), task_count, label)
            return kpis

    raise KPIGenerationError(last_error)


# CSV batch generation


def parse_bulk_csv(csv_text: str) -> list[dict[str, Any]]:
    """Group ``Role,Tugas`` rows by role, preserving first-appearance order."""
    text = (csv_text or "").lstrip("\ufeff")
    reader = csv.reader(io.StringIO(text))
    header: list[str] | None = None
    for row in reader:
        if any(cell.strip() for cell in row):
            header = row
            break
    if header is None:
        raise HTTPException(status_code=400, detail="CSV file is empty.")

    normalized = [cell.strip().lstrip("\ufeff").lower() for cell in header]
    role_index = next((index for index, cell in enumerate(normalized) if cell in ROLE_HEADER_ALIASES), None)
    task_index = next((index for index, cell in enumerate(normalized) if cell in TASK_HEADER_ALIASES), None)
    if role_index is None or task_index is None:
        raise HTTPException(status_code=400, detail="CSV header must contain 'Role' and 'Tugas' columns.")

    groups: dict[str, dict[str, Any]] = {}
    for row in reader:
        role = collapse_whitespace(row[role_index]) if len(row) > role_index else ""
        task = collapse_whitespace(row[task_index]) if len(row) > task_index else ""
        if not role or not task:
            continue
        group = groups.setdefault(role.lower(), {"role": role, "tasks": [], "truncated_tasks": 0})
        if task in group["tasks"]:
            continue
        if len(group["tasks"]) >= BATCH_MAX_TASKS_PER_ROLE:
            group["truncated_tasks"] += 1
            continue
        group["tasks"].append(task)

    if not groups:
        raise HTTPException(status_code=400, detail="No valid Role/Tugas rows found in the CSV.")
    if len(groups) > BATCH_MAX_ROLES:
        raise HTTPException(
            status_code=400,
            detail=f"CSV contains {len(groups)} roles. The limit per batch is {BATCH_MAX_ROLES}.",
        )
    return list(groups.values())


def batch_outcome(index: int, group: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": index,
        "role": group["role"],
        "task_count": len(group["tasks"]),
        "truncated_tasks": group["truncated_tasks"],
        "status": "pending",
        "error": None,
        "kpis": [],
        "transaction_id": None,
        "library_entry_id": None,
    }


def iter_batch_generation(user_id: int, groups: list[dict[str, Any]], save_to_library: bool = True) -> Iterator[dict[str, Any]]:
    """Run one generation per role, yielding progress events as it goes.

    A failed role is reported and skipped; running out of tokens skips every
    remaining role. Tokens are only spent after a successful generation.
    """
    cost = KPI_GENERATION_TOKEN_COST
    outcomes: list[dict[str, Any]] = []
    stop_reason: str | None = None
    tokens_spent = 0
    yield {"event": "batch_started", "roles": len(groups), "cost_per_role": cost}

    for index, group in enumerate(groups):
        outcome = batch_outcome(index, group)
        outcomes.append(outcome)
        if stop_reason is None and load_wallet(user_id)["total"] < cost:
            stop_reason = "insufficient_tokens"
        if stop_reason:
            outcome.update(status="skipped", error=stop_reason)
            yield {"event": "role_skipped", **outcome}
            continue

        yield {"event": "role_started", "index": index, "role": outcome["role"], "task_count": outcome["task_count"]}
        try:
            kpis = generate_kpis(
                build_task_job_description(group["role"], group["tasks"]),
                role=group["role"],
                task_count=len(group["tasks"]),
            )
        except KPIGenerationError as exc:
            logger.warning("Batch generation for role '%s' failed: %s", group["role"], exc)
            outcome.update(status="failed", error=str(exc))
            yield {"event": "role_failed", **outcome}
            continue

        try:
            debit = debit_tokens(
                user_id,
                cost,
                f"Batch KPI generation: {group['role']}",
                meta={"route": "/kpis/batch", "role": group["role"], "kpi_count": len(kpis)},
            )
        except HTTPException as exc:
            if exc.status_code != 402:
                raise
            stop_reason = "insufficient_tokens"
            outcome.update(status="skipped", error=stop_reason)
            yield {"event": "role_skipped", **outcome}
            continue

        tokens_spent += cost
        outcome.update(status="success", kpis=kpis, transaction_id=debit["transaction_id"])
        if save_to_library:
            entry = upsert_library_entry(user_id, group["role"], kpis)
            outcome["library_entry_id"] = entry["id"]
        logger.info("Batch role '%s' generated %s KPIs for user %s", group["role"], len(kpis), user_id)
        yield {"event": "role_completed", **outcome}

    summary = {
        "roles": outcomes,
        "succeeded": sum(1 for outcome in outcomes if outcome["status"] == "success"),
        "failed": sum(1 for outcome in outcomes if outcome["status"] == "failed"),
        "skipped": sum(1 for outcome in outcomes if outcome["status"] == "skipped"),
        "tokens_spent": tokens_spent,
        "total_kpis": sum(len(outcome["kpis"]) for outcome in outcomes),
        "wallet": load_wallet(user_id),
    }
    log_analytics_event(
        "generation",
        "batch_completed",
        user_id=user_id,
        meta={key: summary[key] for key in ("succeeded", "failed", "skipped", "tokens_spent", "total_kpis")},
    )
    yield {"event": "batch_completed", **summary}


# Library


def library_entry_payload(row: Any) -> dict[str, Any]:
    kpis = parse_meta_json(row["kpi_json"])
    if not isinstance(kpis, list):
        kpis = []
    return {
        "id": int(row["id"]),
        "job_title": str(row["job_title"]),
        "kpis": kpis,
        "kpi_count": len(kpis),
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def fetch_library_entry(user_id: int, entry_id: int) -> dict[str, Any]:
    connection = db_connection()
    try:
        row = connection.execute(
            "SELECT id, job_title, kpi_json, created_at, updated_at FROM library_entries WHERE id = ? AND user_id = ?",
            (int(entry_id), int(user_id)),
        ).fetchone()
    finally:
        connection.close()
    if not row:
        raise HTTPException(status_code=404, detail="Library entry not found.")
    return library_entry_payload(row)


def list_library_entries(user_id: int) -> list[dict[str, Any]]:
    connection = db_connection()
    try:
        rows = connection.execute(
            """
            SELECT id, job_title, kpi_json, created_at, updated_at
            FROM library_entries
            WHERE user_id = ?
            ORDER BY updated_at DESC, id DESC
            """,
            (int(user_id),),
        ).fetchall()
    finally:
        connection.close()
    return [library_entry_payload(row) for row in rows]


def upsert_library_entry(user_id: int, job_title: str, kpis: list[dict[str, Any]]) -> dict[str, Any]:
    title = collapse_whitespace(job_title)
    if not title:
        raise HTTPException(status_code=400, detail="Job title is required.")
    now = now_utc_iso()
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            existing = cursor.execute(
                "SELECT id FROM library_entries WHERE user_id = ? AND title_key = ?",
                (int(user_id), title.lower()),
            ).fetchone()
            if existing:
                entry_id = int(existing["id"])
                cursor.execute(
                    "UPDATE library_entries SET kpi_json = ?, updated_at = ? WHERE id = ?",
                    (compact_json(kpis), now, entry_id),
                )
            else:
                cursor.execute(
                    """
                    INSERT INTO library_entries (user_id, job_title, title_key, kpi_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (int(user_id), title, title.lower(), compact_json(kpis), now, now),
                )
                entry_id = inserted_row_id(connection, cursor)
            connection.commit()
        finally:
            connection.close()
    entry = fetch_library_entry(user_id, entry_id)
    entry["created"] = not existing
    return entry


def update_library_kpis(user_id: int, entry_id: int, kpis: list[dict[str, Any]]) -> dict[str, Any]:
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.execute(
                "UPDATE library_entries SET kpi_json = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (compact_json(kpis), now_utc_iso(), int(entry_id), int(user_id)),
            )
            updated = cursor.rowcount
            connection.commit()
        finally:
            connection.close()
    if not updated:
        raise HTTPException(status_code=404, detail="Library entry not found.")
    return fetch_library_entry(user_id, entry_id)


def delete_library_entry(user_id: int, entry_id: int) -> None:
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.execute(
                "DELETE FROM library_entries WHERE id = ? AND user_id = ?",
                (int(entry_id), int(user_id)),
            )
            deleted = cursor.rowcount
            connection.commit()
        finally:
            connection.close()
    if not deleted:
        raise HTTPException(status_code=404, detail="Library entry not found.")


def kpi_matches_query(kpi: dict[str, Any], query: str) -> bool:
    return query in str(kpi.get("kpi_name") or "").lower() or query in str(kpi.get("definition") or "").lower()


def kpi_matches_facets(kpi: dict[str, Any], perspective: str, kpi_type: str) -> bool:
    if perspective and kpi.get("perspective") != perspective:
        return False
    if kpi_type and kpi.get("type") != kpi_type:
        return False
    return True


def filter_library(
    entries: list[dict[str, Any]],
    query: str = "",
    role: str = "",
    perspective: str = "",
    kpi_type: str = "",
    view: str = "roles",
) -> list[dict[str, Any]]:
    needle = safe_text(query).lower()
    if view == "kpis":
        matches: list[dict[str, Any]] = []
        for entry in entries:
            if role and entry["job_title"] != role:
                continue
            for kpi in entry["kpis"]:
                searchable = kpi_matches_query(kpi, needle) or needle in entry["job_title"].lower()
                if searchable and kpi_matches_facets(kpi, perspective, kpi_type):
                    matches.append({**kpi, "parent_job_title": entry["job_title"], "parent_id": entry["id"], "parent_updated_at": entry["updated_at"]})
        return matches

    roles: list[dict[str, Any]] = []
    for entry in entries:
        if role and entry["job_title"] != role:
            continue
        title_matches = needle in entry["job_title"].lower()
        has_matching_kpi = any(
            kpi_matches_query(kpi, needle) and kpi_matches_facets(kpi, perspective, kpi_type) for kpi in entry["kpis"]
        )
        if title_matches or has_matching_kpi:
            roles.append(entry)
    return roles


def library_facets(entries: list[dict[str, Any]]) -> dict[str, list[str]]:
    kpis = [kpi for entry in entries for kpi in entry["kpis"]]
    return {
        "roles": sorted({entry["job_title"] for entry in entries}),
        "perspectives": sorted({str(kpi.get("perspective")) for kpi in kpis if kpi.get("perspective")}),
        "types": sorted({str(kpi.get("type")) for kpi in kpis if kpi.get("type")}),
    }


# Mayar payment webhook


def mayar_event_type(payload: dict[str, Any]) -> str:
    event = payload.get("event")
    if isinstance(event, dict):
        return safe_text(str(event.get("received") or ""))
    return safe_text(str(payload.get("event.received") or event or ""))


def mayar_signature_valid(raw_body: bytes, signature: str) -> bool:
    expected = hmac.new(MAYAR_WEBHOOK_SECRET.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    provided = safe_text(signature).lower().encode("utf-8", "surrogateescape")
    return hmac.compare_digest(expected.encode("ascii"), provided)


def mayar_is_paid(status: Any) -> bool:
    if isinstance(status, bool):
        return status
    if isinstance(status, str):
        return status.strip().upper() in MAYAR_PAID_STATUSES
    return False


def first_present(sources: list[Any], keys: tuple[str, ...]) -> Any:
    for source in sources:
        if not isinstance(source, dict):
            continue
        for key in keys:
            value = source.get(key)
            if value not in (None, ""):
                return value
    return None


def mayar_user_reference(data: dict[str, Any], payload: dict[str, Any]) -> str:
    direct = first_present([data, payload], ("custom_field_1", "customField1", "custom_field1"))
    if direct is not None:
        return safe_text(str(direct))
    fields = data.get("custom_field")
    if isinstance(fields, list):
        for field in fields:
            if not isinstance(field, dict):
                continue
            key = field.get("key") or field.get("name") or field.get("label")
            value = field.get("value") or field.get("answer") or field.get("data") or field.get("input")
            if key == "custom_field_1" and isinstance(value, str) and value.strip():
                return value.strip()
    return ""


def mayar_customer_email(data: dict[str, Any], payload: dict[str, Any]) -> str:
    customer = data.get("customer")
    value = first_present([customer, data, payload], ("email", "customerEmail"))
    return normalize_email(str(value)) if value is not None else ""


def mayar_customer_id(data: dict[str, Any], payload: dict[str, Any]) -> str:
    value = first_present([data], ("customerId", "customer_id", "customerID", "memberId", "member_id"))
    if value is None:
        value = first_present([data.get("membershipCustomer")], ("id", "userId"))
    if value is None:
        value = first_present([data.get("customer")], ("id",))
    if value is None:
        value = first_present([payload], ("customerId", "customer_id"))
    return safe_text(str(value)) if value is not None else ""


def mayar_transaction_id(data: dict[str, Any]) -> str:
    value = first_present([data], ("id", "transactionId", "invoiceId"))
    return safe_text(str(value)) if value is not None else ""


def mayar_tokens_purchased(data: dict[str, Any]) -> int:
    credit = first_present(
        [data],
        ("credit", "creditAmount", "credit_amount", "creditPurchased", "credit_purchased", "customerBalanceDelta", "customer_balance_delta"),
    )
    try:
        credit_value = float(credit) if credit is not None else 0.0
    except (TypeError, ValueError):
        credit_value = 0.0
    if credit_value > 0:
        return int(credit_value)
    try:
        amount = float(data.get("amount") or 0)
    except (TypeError, ValueError):
        amount = 0.0
    if amount > 0:
        return int(amount // MAYAR_PRICE_PER_TOKEN)
    return 0


def record_webhook_event(fields: dict[str, Any]) -> int | None:
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO webhook_events
                (provider, event_type, external_id, customer_id, customer_email, signature_present,
                 result, payload_json, headers_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fields["provider"],
                    fields.get("event_type") or "",
                    fields.get("external_id") or None,
                    fields.get("customer_id") or None,
                    fields.get("customer_email") or None,
                    1 if fields.get("signature_present") else 0,
                    "received",
                    fields.get("payload_json"),
                    fields.get("headers_json"),
                    now_utc_iso(),
                ),
            )
            event_id = inserted_row_id(connection, cursor)
            connection.commit()
            return event_id
        except Exception:
            logger.exception("Failed to record webhook event")
            connection.rollback()
            return None
        finally:
            connection.close()


WEBHOOK_EVENT_UPDATABLE = {"signature_valid", "http_status", "processed", "result", "error_message", "user_id"}


def update_webhook_event(event_id: int | None, **fields: Any) -> None:
    if not event_id:
        return
    columns = [column for column in fields if column in WEBHOOK_EVENT_UPDATABLE]
    if not columns:
        return
    values = [int(fields[column]) if isinstance(fields[column], bool) else fields[column] for column in columns]
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                f"UPDATE webhook_events SET {', '.join(f'{column} = ?' for column in columns)} WHERE id = ?",
                tuple(values) + (int(event_id),),
            )
            connection.commit()
        except Exception:
            logger.exception("Failed to update webhook event %s", event_id)
            connection.rollback()
        finally:
            connection.close()


def link_mayar_customer(user_id: int, customer_id: str) -> None:
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute("UPDATE users SET mayar_customer_id = ? WHERE id = ?", (customer_id, int(user_id)))
            connection.commit()
        finally:
            connection.close()


def webhook_reply(event_id: int | None, status_code: int, result: str, message: str, processed: bool, **fields: Any) -> JSONResponse:
    update_webhook_event(event_id, http_status=status_code, result=result, processed=processed, **fields)
    return JSONResponse(status_code=status_code, content={"message": message, "result": result})


def process_mayar_webhook(raw_body: bytes, headers: dict[str, str]) -> JSONResponse:
    try:
        payload = json.loads(raw_body.decode("utf-8") or "null")
    except (UnicodeDecodeError, json.JSONDecodeError):
        return JSONResponse(status_code=400, content={"message": "Invalid JSON payload.", "result": "invalid_payload"})
    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"message": "Invalid JSON payload.", "result": "invalid_payload"})

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    signature = safe_text(headers.get("x-mayar-signature"))
    event_type = mayar_event_type(payload)
    event_id = record_webhook_event(
        {
            "provider": "mayar",
            "event_type": event_type,
            "external_id": mayar_transaction_id(data),
            "customer_id": mayar_customer_id(data, payload),
            "customer_email": mayar_customer_email(data, payload),
            "signature_present": bool(signature),
            "payload_json": compact_json(payload),
            "headers_json": compact_json({key: value for key, value in headers.items() if key.lower() != "authorization"}),
        }
    )

    if not MAYAR_WEBHOOK_SECRET:
        return webhook_reply(event_id, 503, "not_configured", "Webhook secret is not configured.", False)
    if not signature or not mayar_signature_valid(raw_body, signature):
        logger.warning("Rejected Mayar webhook with %s signature.", "invalid" if signature else "missing")
        return webhook_reply(event_id, 401, "invalid_signature", "Invalid Signature", False, signature_valid=False, error_message="Invalid Signature")
    update_webhook_event(event_id, signature_valid=True)

    try:
        if event_type == "testing":
            return webhook_reply(event_id, 200, "testing", "Test event received", True)

        if not mayar_is_paid(data.get("status")):
            logger.info("Ignoring Mayar webhook with unpaid status %r", data.get("status"))
            return webhook_reply(event_id, 200, "unpaid_ignored", "Ignored", True)

        reference = mayar_user_reference(data, payload)
        email = mayar_customer_email(data, payload)
        if not reference and not email:
            return webhook_reply(event_id, 400, "missing_identifier", "Could not identify user from payload", False, error_message="Missing identifier")

        user = fetch_user_by_id(int(reference)) if reference.isdigit() else None
        if not user and email:
            user = fetch_user_by_email(email)
        if not user:
            return webhook_reply(event_id, 400, "user_not_found", "User not found", False, error_message="User not found")
        user_id = int(user["id"])
        update_webhook_event(event_id, user_id=user_id)

        customer_id = mayar_customer_id(data, payload)
        if customer_id:
            link_mayar_customer(user_id, customer_id)

        tokens = mayar_tokens_purchased(data)
        if tokens <= 0:
            return webhook_reply(event_id, 200, "paid_no_credit", "Webhook processed successfully", True)

        tx_id = mayar_transaction_id(data)
        if not tx_id:
            logger.warning("Mayar webhook for user %s has no transaction id; credit is not deduplicated.", user_id)
        credit = credit_tokens(
            user_id,
            tokens,
            f"Mayar top-up: tx={tx_id or 'unknown'} credit={tokens}",
            external_ref=f"mayar:{tx_id}" if tx_id else None,
            meta={"provider": "mayar", "transaction_id": tx_id, "amount": data.get("amount"), "webhook_event_id": event_id},
        )
        if credit["duplicate"]:
            return webhook_reply(event_id, 200, "duplicate_ignored", "Duplicate transaction ignored", True)

        log_analytics_event("payment", "topup_completed", user_id=user_id, meta={"provider": "mayar", "tokens": tokens, "transaction_id": tx_id})
        return webhook_reply(event_id, 200, "paid_processed", "Webhook processed successfully", True)
    except Exception as exc:
        logger.exception("Mayar webhook processing failed")
        update_webhook_event(event_id, http_status=400, processed=False, result="exception", error_message=str(exc))
        return JSONResponse(status_code=400, content={"error": str(exc), "result": "exception"})


# Admin helpers


def admin_user_payload(row: Any) -> dict[str, Any]:
    payload = user_payload(row)
    payload.update(
        {
            "free_tokens": int(row["free_tokens"]),
            "paid_tokens": int(row["paid_tokens"]),
            "last_reset_date": safe_text(row["last_reset_date"]),
            "resend_count": int(row["resend_count"] or 0),
            "last_resend_at": row["last_resend_at"],
            "last_login_at": row["last_login_at"],
            "mayar_customer_id": row["mayar_customer_id"],
        }
    )
    return payload


def collect_admin_users(q: str | None = None) -> list[dict[str, Any]]:
    search = safe_text(q).lower()
    where_sql = ""
    values: tuple[Any, ...] = ()
    if search:
        where_sql = "WHERE lower(email) LIKE ? OR lower(full_name) LIKE ?"
        values = (f"%{search}%", f"%{search}%")
    connection = db_connection()
    try:
        rows = connection.execute(
            f"""
            SELECT {USER_COLUMNS} FROM users
            {where_sql}
            ORDER BY CASE WHEN role = 'admin' THEN 0 ELSE 1 END, email ASC
            """,
            values,
        ).fetchall()
    finally:
        connection.close()
    return [admin_user_payload(row) for row in rows]


def require_user_row(user_id: int) -> Any:
    if user_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid user id.")
    user = fetch_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return user


def reserve_invite_resend(email: str) -> tuple[Any, int]:
    """Count one resend against today's limit, returning the user and remaining sends."""
    today = local_today()
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            user = cursor.execute(f"SELECT {USER_COLUMNS} FROM users WHERE email = ?", (normalize_email(email),)).fetchone()
            if not user:
                connection.rollback()
                raise HTTPException(status_code=404, detail="User not found.")
            count = int(user["resend_count"] or 0)
            last_resend_at = safe_text(user["last_resend_at"])
            if last_resend_at and local_date_of(last_resend_at) != today:
                count = 0
            if count >= INVITE_RESEND_DAILY_LIMIT:
                connection.rollback()
                raise HTTPException(
                    status_code=429,
                    detail=f"Daily invite resend limit ({INVITE_RESEND_DAILY_LIMIT}x) reached.",
                )
            cursor.execute(
                "UPDATE users SET resend_count = ?, last_resend_at = ? WHERE id = ?",
                (count + 1, now_utc_iso(), int(user["id"])),
            )
            connection.commit()
        finally:
            connection.close()
    return user, INVITE_RESEND_DAILY_LIMIT - (count + 1)


def release_invite_resend(user_id: int) -> None:
    """Give back a slot taken by ``reserve_invite_resend`` when delivery failed."""
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                "UPDATE users SET resend_count = resend_count - 1 WHERE id = ? AND resend_count > 0",
                (int(user_id),),
            )
            connection.commit()
        finally:
            connection.close()


def collect_recent_rows(table: str, limit: int) -> list[dict[str, Any]]:
    if table not in {"analytics_events", "webhook_events"}:
        raise ValueError(f"Unsupported table: {table}")
    connection = db_connection()
    try:
        rows = connection.execute(f"SELECT * FROM {table} ORDER BY id DESC LIMIT ?", (int(limit),)).fetchall()
    finally:
        connection.close()
    items: list[dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        for key in ("meta_json", "payload_json", "headers_json"):
            if key in item:
                item[key.removesuffix("_json")] = parse_meta_json(item.pop(key))
        items.append(item)
    return items


# Routes


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "KPI Library backend running"}


@app.post("/auth/login")
def login(data: LoginRequest) -> dict[str, Any]:
    email = normalize_email(data.email)
    user = fetch_user_by_email(email)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password.")
    if safe_text(user["status"]) != "active":
        raise HTTPException(status_code=401, detail="Invitation not accepted yet. Use the link in your invite email.")
    expected = hash_password(safe_text(data.password), str(user["password_salt"]))
    if not hmac.compare_digest(expected, str(user["password_hash"])):
        log_analytics_event("auth", "login_failed_wrong_password", user_id=int(user["id"]))
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute("UPDATE users SET last_login_at = ? WHERE id = ?", (now_utc_iso(), int(user["id"])))
            connection.commit()
        finally:
            connection.close()
    log_analytics_event("auth", "login_success", user_id=int(user["id"]))
    return {
        "user": user_payload(user),
        "wallet": load_wallet(int(user["id"])),
        "auth_token": create_auth_token(int(user["id"]), str(user["email"])),
    }


@app.post("/auth/accept-invite")
def accept_invite(data: AcceptInviteRequest) -> dict[str, Any]:
    payload = decode_auth_token(data.token, purpose="invite")
    password = safe_text(data.password)
    if len(password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters.")
    user = fetch_user_by_id(int(payload.get("uid", 0)))
    if not user or normalize_email(str(user["email"])) != normalize_email(str(payload.get("email", ""))):
        raise HTTPException(status_code=401, detail="Invitation is no longer valid.")
    if safe_text(user["status"]) == "active":
        raise HTTPException(status_code=409, detail="Invitation already accepted. Please log in.")

    salt = secrets.token_hex(16)
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute(
                "UPDATE users SET password_hash = ?, password_salt = ?, status = 'active', last_login_at = ? WHERE id = ?",
                (hash_password(password, salt), salt, now_utc_iso(), int(user["id"])),
            )
            connection.commit()
        finally:
            connection.close()
    refreshed = fetch_user_by_id(int(user["id"]))
    log_analytics_event("auth", "invite_accepted", user_id=int(user["id"]))
    return {
        "user": user_payload(refreshed),
        "wallet": load_wallet(int(user["id"])),
        "auth_token": create_auth_token(int(user["id"]), str(user["email"])),
    }


@app.get("/auth/me")
def auth_me(request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request)
    return {"user": user_payload(user), "wallet": load_wallet(int(user["id"]))}


@app.get("/tokens")
def token_balance(request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request)
    return {"wallet": load_wallet(int(user["id"]))}


@app.get("/tokens/history")
def token_history(request: Request, limit: int = 100) -> dict[str, Any]:
    user = require_authenticated_user(request)
    load_wallet(int(user["id"]))
    safe_limit = int(clamp_float(float(limit), 1, 500))
    return {"transactions": fetch_token_history(int(user["id"]), safe_limit)}


@app.post("/tokens/topup")
def token_topup(data: TopupRequest, request: Request) -> dict[str, Any]:
    if not ALLOW_UNVERIFIED_TOPUP:
        raise HTTPException(status_code=403, detail="Top-up endpoint disabled.")
    user = require_authenticated_user(request)
    tokens = int(clamp_float(float(data.tokens), 1, 5000))
    credit = credit_tokens(int(user["id"]), tokens, "Manual token top-up", meta={"source": "api_topup"})
    log_analytics_event("tokens", "manual_topup", user_id=int(user["id"]), meta={"tokens": tokens})
    return {"wallet": credit["wallet"], "transaction_id": credit["transaction_id"]}


@app.post("/kpis/generate")
def generate_kpi_library(data: GenerateKPIRequest, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request)
    job_description = safe_text(data.job_description)
    if len(job_description) < 3:
        raise HTTPException(status_code=400, detail="Enter a job description or role.")
    if client is None:
        raise HTTPException(status_code=503, detail="AI generation is not configured.")

    ensure_tokens_available(int(user["id"]), KPI_GENERATION_TOKEN_COST)
    try:
        kpis = generate_kpis(job_description)
    except KPIGenerationError as exc:
        log_analytics_event("generation", "generate_failed", user_id=int(user["id"]), meta={"error": str(exc)})
        raise HTTPException(status_code=502, detail="KPI generation failed. No tokens were used. Please retry.") from exc

    debit = debit_tokens(
        int(user["id"]),
        KPI_GENERATION_TOKEN_COST,
        "Generated KPIs",
        meta={"route": "/kpis/generate", "kpi_count": len(kpis)},
    )
    log_analytics_event("generation", "generate_success", user_id=int(user["id"]), meta={"kpi_count": len(kpis)})
    return {"kpis": kpis, "wallet": debit["wallet"], "transaction_id": debit["transaction_id"]}


@app.post("/kpis/batch/preview")
def preview_batch(data: BatchGenerateRequest, request: Request) -> dict[str, Any]:
    require_authenticated_user(request)
    groups = parse_bulk_csv(data.csv_text)
    return {
        "roles": groups,
        "role_count": len(groups),
        "task_count": sum(len(group["tasks"]) for group in groups),
        "token_cost": len(groups) * KPI_GENERATION_TOKEN_COST,
    }


def prepare_batch(data: BatchGenerateRequest, request: Request) -> tuple[int, list[dict[str, Any]]]:
    user = require_authenticated_user(request)
    groups = parse_bulk_csv(data.csv_text)
    if client is None:
        raise HTTPException(status_code=503, detail="AI generation is not configured.")
    return int(user["id"]), groups


@app.post("/kpis/batch")
def generate_batch(data: BatchGenerateRequest, request: Request) -> dict[str, Any]:
    user_id, groups = prepare_batch(data, request)
    summary: dict[str, Any] = {}
    try:
        for event in iter_batch_generation(user_id, groups, save_to_library=data.save_to_library):
            if event["event"] == "batch_completed":
                summary = {key: value for key, value in event.items() if key != "event"}
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Batch generation failed for user %s", user_id)
        raise HTTPException(status_code=500, detail="Batch generation failed unexpectedly. Completed roles were kept.") from exc
    return summary


@app.post("/kpis/batch/stream")
def generate_batch_stream(data: BatchGenerateRequest, request: Request) -> StreamingResponse:
    user_id, groups = prepare_batch(data, request)

    def event_lines() -> Iterator[str]:
        try:
            for event in iter_batch_generation(user_id, groups, save_to_library=data.save_to_library):
                yield compact_json(event) + "\n"
        except Exception as exc:
            logger.exception("Streamed batch generation failed for user %s", user_id)
            detail = exc.detail if isinstance(exc, HTTPException) else "Batch generation failed unexpectedly. Completed roles were kept."
            yield compact_json({"event": "batch_failed", "error": detail}) + "\n"

    return StreamingResponse(event_lines(), media_type="application/x-ndjson")


@app.get("/library")
def library_list(
    request: Request,
    q: str | None = None,
    role: str | None = None,
    perspective: str | None = None,
    kpi_type: str | None = Query(None, alias="type"),
    view: str = "roles",
) -> dict[str, Any]:
    user = require_authenticated_user(request)
    if view not in {"roles", "kpis"}:
        raise HTTPException(status_code=400, detail="View must be 'roles' or 'kpis'.")
    items = filter_library(
        list_library_entries(int(user["id"])),
        query=safe_text(q),
        role=safe_text(role),
        perspective=safe_text(perspective),
        kpi_type=safe_text(kpi_type),
        view=view,
    )
    return {"view": view, "items": items, "count": len(items)}


@app.get("/library/facets")
def library_facet_values(request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request)
    return library_facets(list_library_entries(int(user["id"])))


@app.post("/library")
def library_save(data: LibrarySaveRequest, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request)
    kpis = [kpi.model_dump() for kpi in data.kpis]
    entry = upsert_library_entry(int(user["id"]), data.job_title, kpis)
    log_analytics_event(
        "library",
        "entry_created" if entry["created"] else "entry_overwritten",
        user_id=int(user["id"]),
        meta={"entry_id": entry["id"], "kpi_count": entry["kpi_count"]},
    )
    return {"entry": entry}


@app.get("/library/{entry_id}")
def library_get(entry_id: int, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request)
    return {"entry": fetch_library_entry(int(user["id"]), entry_id)}


@app.put("/library/{entry_id}")
def library_update(entry_id: int, data: LibraryUpdateRequest, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request)
    entry = update_library_kpis(int(user["id"]), entry_id, [kpi.model_dump() for kpi in data.kpis])
    return {"entry": entry}


@app.delete("/library/{entry_id}")
def library_delete(entry_id: int, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request)
    delete_library_entry(int(user["id"]), entry_id)
    log_analytics_event("library", "entry_deleted", user_id=int(user["id"]), meta={"entry_id": entry_id})
    return {"deleted": True, "id": entry_id}


@app.get("/payments/config")
def payment_config() -> dict[str, Any]:
    return {
        "provider": "mayar",
        "payment_enabled": bool(MAYAR_PAYMENT_URL and MAYAR_WEBHOOK_SECRET),
        "payment_url": MAYAR_PAYMENT_URL,
        "product_id": MAYAR_PRODUCT_ID,
        "price_per_token": MAYAR_PRICE_PER_TOKEN,
    }


@app.post("/payments/mayar/webhook")
async def mayar_webhook(request: Request) -> JSONResponse:
    raw_body = await request.body()
    return process_mayar_webhook(raw_body, dict(request.headers))


@app.get("/admin/users")
def admin_users(request: Request, q: str | None = None) -> dict[str, Any]:
    require_admin_access(request)
    return {"users": collect_admin_users(q)}


@app.post("/admin/users")
def admin_create_user(data: AdminCreateUserRequest, request: Request) -> dict[str, Any]:
    actor = require_admin_access(request)
    tokens = max(0, int(data.tokens or INVITE_DEFAULT_TOKENS))
    user = create_user_account(
        data.email,
        None,
        full_name=safe_text(data.full_name),
        status="invited",
        free_tokens=tokens,
    )
    email_error = send_invite_email(user)
    if email_error:
        logger.warning("Invite email to %s failed: %s", user["email"], email_error)
    log_analytics_event("admin", "user_invited", user_id=int(user["id"]), meta={"actor": actor, "tokens": tokens})
    return {"user": admin_user_payload(user), "email_sent": email_error is None, "email_error": email_error}


@app.post("/admin/users/resend-invite")
def admin_resend_invite(data: AdminResendInviteRequest, request: Request) -> dict[str, Any]:
    actor = require_admin_access(request)
    user, remaining = reserve_invite_resend(data.email)
    email_error = send_invite_email(user)
    if email_error:
        release_invite_resend(int(user["id"]))
        raise HTTPException(status_code=502, detail=f"Invite could not be delivered: {email_error}")
    log_analytics_event("admin", "invite_resent", user_id=int(user["id"]), meta={"actor": actor, "remaining": remaining})
    return {"success": True, "message": "Invitation resent.", "remaining": remaining}


@app.patch("/admin/users/{user_id}/tokens")
def admin_update_tokens(user_id: int, data: AdminTokensUpdateRequest, request: Request) -> dict[str, Any]:
    actor = require_admin_access(request)
    require_user_row(user_id)
    result = set_tokens(user_id, data.free_tokens, data.paid_tokens, actor)
    log_analytics_event("admin", "user_tokens_set", user_id=user_id, meta={"actor": actor, **{k: result["wallet"][k] for k in ("free_tokens", "paid_tokens")}})
    return result


@app.patch("/admin/users/{user_id}/role")
def admin_update_role(user_id: int, data: AdminRoleUpdateRequest, request: Request) -> dict[str, Any]:
    actor = require_admin_access(request)
    role = safe_text(data.role).lower()
    if role not in USER_ROLES:
        raise HTTPException(status_code=400, detail="Role must be 'admin' or 'user'.")
    require_user_row(user_id)
    with DB_LOCK:
        connection = db_connection()
        try:
            connection.execute("UPDATE users SET role = ? WHERE id = ?", (role, user_id))
            connection.commit()
        finally:
            connection.close()
    log_analytics_event("admin", "user_role_set", user_id=user_id, meta={"actor": actor, "role": role})
    return {"user": admin_user_payload(fetch_user_by_id(user_id))}


@app.delete("/admin/users/{user_id}")
def admin_delete_user(user_id: int, request: Request) -> dict[str, Any]:
    actor = require_admin_access(request)
    user = require_user_row(user_id)
    with DB_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            cursor.execute("DELETE FROM library_entries WHERE user_id = ?", (user_id,))
            cursor.execute("DELETE FROM token_transactions WHERE user_id = ?", (user_id,))
            cursor.execute("DELETE FROM analytics_events WHERE user_id = ?", (user_id,))
            cursor.execute("UPDATE webhook_events SET user_id = NULL WHERE user_id = ?", (user_id,))
            cursor.execute("DELETE FROM users WHERE id = ?", (user_id,))
            connection.commit()
        finally:
            connection.close()
    log_analytics_event("admin", "user_deleted", meta={"actor": actor, "user_id": user_id, "email": str(user["email"])})
    return {"success": True, "message": "User deleted successfully", "user_id": user_id}


@app.post("/admin/email")
def admin_send_email(data: AdminEmailRequest, request: Request) -> dict[str, Any]:
    require_admin_access(request)
    recipients = [data.to] if isinstance(data.to, str) else list(data.to)
    recipients = [normalize_email(recipient) for recipient in recipients if safe_text(recipient)]
    subject = safe_text(data.subject)
    body = safe_text(data.body)
    if not recipients or not subject or not body:
        raise HTTPException(status_code=400, detail="Recipient, subject and body are required.")
    invalid = [recipient for recipient in recipients if not valid_email(recipient)]
    if invalid:
        raise HTTPException(status_code=400, detail=f"Invalid recipient: {invalid[0]}")

    results = []
    for recipient in recipients:
        error = send_email_message(recipient, subject, body)
        record_email_log(recipient, subject, safe_text(data.type) or "notification", error)
        results.append({"to": recipient, "sent": error is None, "error": error})
    return {"results": results, "sent": sum(1 for result in results if result["sent"])}


@app.get("/admin/events")
def admin_events(request: Request, limit: int = 200) -> dict[str, Any]:
    require_admin_access(request)
    return {"events": collect_recent_rows("analytics_events", int(clamp_float(float(limit), 1, 1000)))}


@app.get("/admin/webhook-events")
def admin_webhook_events(request: Request, limit: int = 100) -> dict[str, Any]:
    require_admin_access(request)
    return {"webhook_events": collect_recent_rows("webhook_events", int(clamp_float(float(limit), 1, 500)))}


@app.get("/admin/token-transactions")
def admin_token_transactions(request: Request, limit: int = 120) -> dict[str, Any]:
    require_admin_access(request)
    return {"transactions": fetch_token_history(None, int(clamp_float(float(limit), 1, 500)))}
