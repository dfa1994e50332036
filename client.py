"""Python client for the todo API.

`TodoApi` wraps the HTTP endpoints, `TodoList` keeps the one in-memory copy of
the list and applies every change optimistically, and `Session` remembers the
logged-in user between runs.
"""
from __future__ import annotations

import itertools
import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)

API_URL = os.getenv("TODO_API_URL", "http://localhost:3000")
SESSION_FILE = Path(os.getenv("TODO_SESSION_FILE", "~/.todo_session.json")).expanduser()

IDLE = "idle"
PENDING = "pending-mutation"


class ApiRequestError(Exception):
    """Any non-2xx answer or transport failure. status is 0 when no response arrived."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass
class Todo:
    id: int
    text: str
    completed: bool = False
    position: int = 0

    @classmethod
    def from_json(cls, data: dict) -> "Todo":
        return cls(
            id=int(data["id"]),
            text=data["text"],
            completed=bool(data["completed"]),
            position=int(data["position"]),
        )


class TodoApi:
    def __init__(self, base_url: str = API_URL, token: Optional[str] = None,
                 http: Optional[httpx.Client] = None):
        self.http = http or httpx.Client(base_url=base_url, timeout=10.0)
        self.token = token

    def _request(self, method: str, path: str, body: Any = None, auth: bool = True) -> Any:
        headers = {}
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = self.http.request(method, path, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise ApiRequestError(0, f"Request failed: {e}") from e
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.is_error:
            message = data.get("message") if isinstance(data, dict) else None
            raise ApiRequestError(resp.status_code, message or f"HTTP {resp.status_code}")
        return data

    def register(self, username: str, password: str) -> None:
        self._request("POST", "/api/register", {"username": username, "password": password}, auth=False)

    def login(self, username: str, password: str) -> dict:
        data = self._request("POST", "/api/login", {"username": username, "password": password}, auth=False)
        self.token = data["token"]
        return data

    def me(self) -> dict:
        return self._request("GET", "/api/me")

    def list_todos(self) -> List[Todo]:
        return [Todo.from_json(t) for t in self._request("GET", "/api/todos")]

    def create_todo(self, text: str) -> Todo:
        return Todo.from_json(self._request("POST", "/api/todos", {"text": text}))

    def toggle_todo(self, todo_id: int) -> Todo:
        return Todo.from_json(self._request("PATCH", f"/api/todos/{todo_id}"))

    def delete_todo(self, todo_id: int) -> None:
        self._request("DELETE", f"/api/todos/{todo_id}")

    def reorder_todos(self, ordered_ids: List[int]) -> None:
        self._request("PATCH", "/api/todos/reorder", {"orderedIds": list(ordered_ids)})


class Session:
    """The logged-in user ({username, token}) kept in a small JSON file."""

    def __init__(self, path: str | Path = SESSION_FILE):
        self.path = Path(path)

    def load(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("ignoring unreadable session file %s", self.path)
            return None
        if not isinstance(data, dict) or not data.get("token") or not data.get("username"):
            return None
        return {"username": data["username"], "token": data["token"]}

    def save(self, username: str, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"username": username, "token": token}), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class TodoList:
    """Local copy of the list with optimistic updates.

    Each mutation snapshots `items`, applies the change right away, then calls
    the API. On success the server's answer is merged in; on any failure the
    snapshot is restored and `on_error` is told why.
    """

    def __init__(self, api: TodoApi, on_error: Optional[Callable[[str], None]] = None):
        self.api = api
        self.on_error = on_error
        self.items: List[Todo] = []
        self.status = IDLE
        self.last_error: Optional[str] = None
        # placeholders for todos the server has not numbered yet
        self._temp_ids = itertools.count(-1, -1)

    @property
    def ids(self) -> List[int]:
        return [t.id for t in self.items]

    def refresh(self) -> bool:
        try:
            self.items = self.api.list_todos()
        except ApiRequestError as e:
            self._fail(e)
            return False
        self.last_error = None
        return True

    def clear(self) -> None:
        self.items = []
        self.status = IDLE
        self.last_error = None

    def _index(self, todo_id: int) -> int:
        for i, t in enumerate(self.items):
            if t.id == todo_id:
                return i
        raise KeyError(todo_id)

    def _fail(self, err: ApiRequestError) -> None:
        self.last_error = err.message
        if self.on_error:
            self.on_error(err.message)

    def _mutate(self, local: Callable[[], None], remote: Callable[[], Any],
                reconcile: Optional[Callable[[Any], None]] = None) -> bool:
        snapshot = list(self.items)
        local()
        self.status = PENDING
        try:
            result = remote()
        except ApiRequestError as e:
            logger.warning("rolling back local change: %s", e.message)
            self.items = snapshot
            self._fail(e)
            return False
        finally:
            self.status = IDLE
        if reconcile:
            reconcile(result)
        self.last_error = None
        return True

    def add(self, text: str) -> bool:
        text = text.strip()
        if not text:
            return False
        temp_id = next(self._temp_ids)
        position = max((t.position for t in self.items), default=-1) + 1

        def local():
            self.items = self.items + [Todo(id=temp_id, text=text, position=position)]

        def reconcile(created: Todo):
            self.items = [created if t.id == temp_id else t for t in self.items]

        return self._mutate(local, lambda: self.api.create_todo(text), reconcile)

    def toggle(self, todo_id: int) -> bool:
        i = self._index(todo_id)

        def local():
            items = list(self.items)
            items[i] = replace(items[i], completed=not items[i].completed)
            self.items = items

        def reconcile(updated: Todo):
            self.items = [updated if t.id == todo_id else t for t in self.items]

        return self._mutate(local, lambda: self.api.toggle_todo(todo_id), reconcile)

    def delete(self, todo_id: int) -> bool:
        self._index(todo_id)

        def local():
            self.items = [t for t in self.items if t.id != todo_id]

        return self._mutate(local, lambda: self.api.delete_todo(todo_id))

    def reorder(self, ordered_ids: List[int]) -> bool:
        by_id = {t.id: t for t in self.items}
        if sorted(ordered_ids) != sorted(by_id):
            raise ValueError("ordered_ids must be a permutation of the current list")

        def local():
            self.items = [replace(by_id[tid], position=i) for i, tid in enumerate(ordered_ids)]

        return self._mutate(local, lambda: self.api.reorder_todos(ordered_ids))

    def move(self, old_index: int, new_index: int) -> bool:
        """Drag-and-drop: move the item at old_index so it ends up at new_index."""
        n = len(self.items)
        if old_index == new_index or not (0 <= old_index < n and 0 <= new_index < n):
            return False
        ids = self.ids
        ids.insert(new_index, ids.pop(old_index))
        return self.reorder(ids)


class TodoApp:
    """Login state plus the list, the way a front end drives them."""

    def __init__(self, api: Optional[TodoApi] = None, session: Optional[Session] = None,
                 on_error: Optional[Callable[[str], None]] = None):
        self.api = api or TodoApi()
        self.session = session or Session()
        self.todos = TodoList(self.api, on_error=on_error)
        self.username: Optional[str] = None

    @property
    def logged_in(self) -> bool:
        return self.username is not None

    def restore(self) -> bool:
        """Pick up a saved session; drop it if the server no longer accepts the token."""
        saved = self.session.load()
        if not saved:
            return False
        self.api.token = saved["token"]
        try:
            self.api.me()
        except ApiRequestError as e:
            if e.status in (401, 403):
                logger.info("saved session for %s expired", saved["username"])
                self.session.clear()
            self.api.token = None
            return False
        self.username = saved["username"]
        return self.todos.refresh()

    def register(self, username: str, password: str) -> None:
        self.api.register(username, password)

    def login(self, username: str, password: str) -> None:
        data = self.api.login(username, password)
        self.username = data["username"]
        self.session.save(data["username"], data["token"])
        self.todos.refresh()

    def logout(self) -> None:
        self.api.token = None
        self.username = None
        self.session.clear()
        self.todos.clear()
