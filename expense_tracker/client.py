from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Optional

import httpx

from expense_tracker.reporting import balance

DEFAULT_API_URL = "http://localhost:5000/api"
DEFAULT_SESSION_PATH = Path.home() / ".expense_tracker" / "session.json"

logger = logging.getLogger("expense_tracker.client")


class ApiError(RuntimeError):
    """Raised when the API answers with a non-2xx status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class NotLoggedIn(RuntimeError):
    """Raised when a call needs a session and none is stored."""


@dataclass(frozen=True)
class Session:
    user_id: int
    username: str
    token: str

    def to_dict(self) -> dict[str, Any]:
        return {"userId": self.user_id, "username": self.username, "token": self.token}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(user_id=int(data["userId"]), username=data["username"], token=data["token"])


class SessionStore:
    """Keeps the logged-in user in a small JSON file between runs."""

    def __init__(self, path: Path | str = DEFAULT_SESSION_PATH) -> None:
        self.path = Path(path)

    def load(self) -> Optional[Session]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable session file %s", self.path)
            return None

    def save(self, session: Session) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(session.to_dict()), encoding="utf-8")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


@dataclass
class Dashboard:
    transactions: list[dict[str, Any]] = field(default_factory=list)
    summary: list[dict[str, Any]] = field(default_factory=list)
    balance: float = 0.0


class ExpenseClient:
    def __init__(
        self,
        base_url: str | None = None,
        store: SessionStore | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("EXPENSE_TRACKER_API_URL", DEFAULT_API_URL)).rstrip("/")
        self.store = store or SessionStore()
        self._owns_http = http is None
        self.http = http or httpx.Client(timeout=10.0)
        self.session = self.store.load()

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self) -> "ExpenseClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def register(self, username: str, password: str) -> Session:
        return self._open_session("/users/register", username, password)

    def login(self, username: str, password: str) -> Session:
        return self._open_session("/users/login", username, password)

    def logout(self) -> None:
        self.store.clear()
        self.session = None

    def _open_session(self, endpoint: str, username: str, password: str) -> Session:
        data = self._request("POST", endpoint, body={"username": username, "password": password}, auth=False)
        session = Session.from_dict(data)
        self.store.save(session)
        self.session = session
        return session

    def categories(self) -> dict[str, list[str]]:
        return self._request("GET", "/categories", auth=False)

    def list_transactions(self) -> list[dict[str, Any]]:
        return self._request("GET", "/transactions")

    def summary(self) -> list[dict[str, Any]]:
        return self._request("GET", "/transactions/summary")

    def export_csv(self) -> str:
        return self._request("GET", "/transactions/export", raw=True)

    def dashboard(self) -> Dashboard:
        rows = self.list_transactions()
        return Dashboard(
            transactions=rows,
            summary=self.summary(),
            balance=balance(row["amount"] for row in rows),
        )

    def add_transaction(
        self,
        title: str,
        amount: float,
        type: str = "expense",
        category: str | None = None,
        date_value: date | None = None,
    ) -> Dashboard:
        signed = -abs(amount) if type == "expense" else abs(amount)
        self._request(
            "POST",
            "/transactions",
            body={
                "title": title,
                "amount": signed,
                "type": type,
                "category": category,
                "date": (date_value or date.today()).isoformat(),
            },
        )
        return self.dashboard()

    def delete_transaction(self, transaction_id: int) -> Dashboard:
        self._request("DELETE", f"/transactions/{transaction_id}")
        return self.dashboard()

    def _request(
        self,
        method: str,
        endpoint: str,
        body: dict[str, Any] | None = None,
        auth: bool = True,
        raw: bool = False,
    ) -> Any:
        params: dict[str, Any] = {}
        headers: dict[str, str] = {}
        if auth:
            if self.session is None:
                raise NotLoggedIn("Log in before calling the transactions API.")
            headers["Authorization"] = f"Bearer {self.session.token}"
            if body is not None:
                body = {**body, "userId": self.session.user_id}
            else:
                params["userId"] = self.session.user_id

        response = self.http.request(
            method,
            f"{self.base_url}{endpoint}",
            params=params or None,
            json=body,
            headers=headers,
        )
        if response.is_error:
            raise ApiError(response.status_code, _error_message(response))
        if raw:
            return response.text
        if response.status_code == 204 or not response.content:
            return None
        return response.json()


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message") or response.reason_phrase
    except (ValueError, AttributeError):
        return response.text or response.reason_phrase
