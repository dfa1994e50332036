from __future__ import annotations
import os, logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from jose import jwt, JWTError
import bcrypt
import hashlib
from sqlalchemy import (
    create_engine, MetaData, Table, Column, ForeignKey, Index,
    String, Boolean, Integer, Text,
    select, insert, update, delete, and_, func, not_,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

load_dotenv()

logger = logging.getLogger(__name__)

def normalize_database_url(url: str) -> str:
    return "postgresql://" + url[len("postgres://"):] if url.startswith("postgres://") else url

def get_engine() -> Engine:
    db_url = os.getenv("DATABASE_URL", "").strip()
    if db_url:
        db_url = normalize_database_url(db_url)
        if db_url.startswith("postgresql://") and "+psycopg2" not in db_url:
            db_url = db_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    else:
        db_url = "sqlite:///./todo.db"
    return create_engine(db_url, future=True, pool_pre_ping=True)

engine = get_engine()
metadata = MetaData()

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
JWT_TTL_SECONDS = int(os.getenv("JWT_TTL_SECONDS", "86400"))  # 24h
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
CORS_ORIGINS = [o.strip() for o in os.getenv(
    "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",") if o.strip()]

users = Table(
    "users", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String, nullable=False, unique=True),
    Column("password_hash", String, nullable=False),
)

todos = Table(
    "todos", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("text", Text, nullable=False),
    Column("completed", Boolean, nullable=False, default=False, server_default="0"),
    Column("position", Integer, nullable=False, default=0, server_default="0"),
    Index("ix_todos_user_position", "user_id", "position"),
)

def now_ts() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp())

def init_db():
    """Create tables if missing. Existing tables are left as they are."""
    metadata.create_all(engine)

init_db()

# --- Errors ---

class ApiError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

class ValidationError(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid request"

class ConflictError(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Already exists"

class AuthError(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Authentication required"

class ForbiddenError(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Invalid token"

class NotFoundError(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Todo not found"

class InternalError(ApiError):
    pass

# --- Auth / Users ---

bearer = HTTPBearer(auto_error=False)

def _pw_prehash(pw: str) -> bytes:
    """Pre-hash to avoid bcrypt's 72-byte input limit and keep runtime predictable."""
    return hashlib.sha256(pw.encode("utf-8")).digest()

def hash_password(pw: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(_pw_prehash(pw), salt).decode("utf-8")

def verify_password(pw: str, pw_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_pw_prehash(pw), pw_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False

def create_token(user_id: int, username: str) -> str:
    exp = now_ts() + JWT_TTL_SECONDS
    # jose insists on a string subject
    return jwt.encode({"sub": str(user_id), "username": username, "exp": exp}, JWT_SECRET, algorithm=JWT_ALG)

def decode_token(token: str) -> dict:
    """Verify signature and expiry; return the identity the token was issued for."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        uid = int(payload["sub"])
        username = payload["username"]
    except (JWTError, KeyError, TypeError, ValueError):
        raise ForbiddenError("Invalid token")
    if not isinstance(username, str):
        raise ForbiddenError("Invalid token")
    return {"id": uid, "username": username}

def require_user(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> dict:
    if not creds or not creds.credentials:
        raise AuthError("Authentication required")
    return decode_token(creds.credentials)

app = FastAPI(title="Todo API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

BODY_ERROR_MESSAGES = {
    "/api/register": "Username and password are required",
    "/api/login": "Username and password are required",
    "/api/todos/reorder": "Invalid order data",
}

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    message = BODY_ERROR_MESSAGES.get(request.url.path, "Invalid request")
    return await api_error_handler(request, ValidationError(message))

@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return await api_error_handler(request, InternalError())

# Served by ServerErrorMiddleware, which re-raises after sending this response.
@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return await api_error_handler(request, InternalError())

class Credentials(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None

class MessageOut(BaseModel):
    message: str

class LoginOut(BaseModel):
    token: str
    username: str

class UserOut(BaseModel):
    id: int
    username: str

class TodoCreate(BaseModel):
    text: Optional[str] = None

class ReorderPayload(BaseModel):
    orderedIds: Any = None

class TodoOut(BaseModel):
    id: int; text: str; completed: bool; position: int

def to_todo_out(r) -> TodoOut:
    return TodoOut(id=int(r["id"]), text=r["text"], completed=bool(r["completed"]), position=int(r["position"]))

def require_credentials(payload: Credentials) -> tuple[str, str]:
    username = (payload.username or "").strip()
    password = payload.password or ""
    if not username or not password:
        raise ValidationError("Username and password are required")
    return username, password

@app.post("/api/register", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
def register(payload: Credentials):
    username, password = require_credentials(payload)
    pw_hash = hash_password(password)
    try:
        with engine.begin() as conn:
            if conn.execute(select(users.c.id).where(users.c.username == username)).first():
                raise ConflictError("Username already exists")
            conn.execute(insert(users).values(username=username, password_hash=pw_hash))
    except IntegrityError:
        # lost a race against a concurrent registration
        raise ConflictError("Username already exists")
    logger.info("registered user %s", username)
    return MessageOut(message="User registered successfully")

@app.post("/api/login", response_model=LoginOut)
def login(payload: Credentials):
    username, password = require_credentials(payload)
    with engine.connect() as conn:
        u = conn.execute(select(users).where(users.c.username == username)).mappings().first()
    if not u or not verify_password(password, u["password_hash"]):
        logger.warning("failed login for %s", username)
        raise AuthError("Invalid credentials")
    logger.info("user %s logged in", u["username"])
    return LoginOut(token=create_token(u["id"], u["username"]), username=u["username"])

@app.get("/api/me", response_model=UserOut)
def me(user=Depends(require_user)):
    return UserOut(**user)

@app.get("/api/health")
def health(): return {"ok": True}

# --- Todos ---

def parse_ordered_ids(raw: Any) -> List[int]:
    if not isinstance(raw, list):
        raise ValidationError("Invalid order data")
    # bool is an int subclass, but never a todo id
    if any(isinstance(x, bool) or not isinstance(x, int) for x in raw):
        raise ValidationError("Invalid order data")
    return raw

def dense_order(current: List[int], requested: List[int]) -> List[int]:
    """Merge a requested order into the account's current order.

    Requested ids the account owns come first, in the order given (first
    occurrence wins). Unknown ids are dropped. Owned ids missing from the
    request keep their current relative order after the requested ones.
    """
    owned = set(current)
    seen = set(); out = []
    for tid in requested:
        if tid in owned and tid not in seen:
            seen.add(tid); out.append(tid)
    out.extend(tid for tid in current if tid not in seen)
    return out

def lock_account(conn, user_id: int) -> None:
    """Serialize writers of one account's todos before they read the current order.

    pysqlite only opens its transaction at the first DML statement, so SQLite
    takes the database write lock up front; elsewhere the account row is locked.
    """
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.execute(select(users.c.id).where(users.c.id == user_id).with_for_update())

def parse_todo_id(raw: str) -> int:
    # non-numeric ids can't match a row
    if not (raw.isascii() and raw.isdigit()):
        raise NotFoundError("Todo not found")
    return int(raw)

@app.get("/api/todos", response_model=List[TodoOut])
def list_todos(user=Depends(require_user)):
    stmt = select(todos).where(todos.c.user_id == user["id"]).order_by(todos.c.position.asc(), todos.c.id.asc())
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [to_todo_out(r) for r in rows]

@app.post("/api/todos", response_model=TodoOut)
def create_todo(payload: TodoCreate, user=Depends(require_user)):
    text = (payload.text or "").strip()
    if not text: raise ValidationError("Todo text is required")
    with engine.begin() as conn:
        lock_account(conn, user["id"])
        cur = conn.execute(
            select(func.coalesce(func.max(todos.c.position), -1)).where(todos.c.user_id == user["id"])
        ).scalar_one()
        stmt = insert(todos).values(user_id=user["id"], text=text, completed=False, position=int(cur) + 1).returning(todos)
        row = conn.execute(stmt).mappings().first()
    return to_todo_out(row)

# Must stay above the /{todo_id} routes.
@app.patch("/api/todos/reorder", response_model=MessageOut)
def reorder_todos(payload: ReorderPayload, user=Depends(require_user)):
    requested = parse_ordered_ids(payload.orderedIds)
    with engine.begin() as conn:
        lock_account(conn, user["id"])
        current = conn.execute(
            select(todos.c.id).where(todos.c.user_id == user["id"]).order_by(todos.c.position.asc(), todos.c.id.asc())
        ).scalars().all()
        ordered = dense_order(list(current), requested)
        for i, tid in enumerate(ordered):
            conn.execute(update(todos).where(and_(todos.c.id == tid, todos.c.user_id == user["id"])).values(position=i))
    logger.info("user %s reordered %d todos", user["username"], len(ordered))
    return MessageOut(message="Todo order updated successfully")

@app.patch("/api/todos/{todo_id}", response_model=TodoOut)
def toggle_todo(todo_id: str, user=Depends(require_user)):
    tid = parse_todo_id(todo_id)
    stmt = (update(todos).where(and_(todos.c.id == tid, todos.c.user_id == user["id"]))
            .values(completed=not_(todos.c.completed)).returning(todos))
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row: raise NotFoundError("Todo not found")
    return to_todo_out(row)

@app.delete("/api/todos/{todo_id}", response_model=MessageOut)
def delete_todo(todo_id: str, user=Depends(require_user)):
    """Delete one todo. Positions of the remaining todos are left with a gap."""
    tid = parse_todo_id(todo_id)
    with engine.begin() as conn:
        res = conn.execute(delete(todos).where(and_(todos.c.id == tid, todos.c.user_id == user["id"])))
        if res.rowcount == 0: raise NotFoundError("Todo not found")
    return MessageOut(message="Todo deleted")

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "3000")))
