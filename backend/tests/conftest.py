import json
import os
import tempfile
from types import SimpleNamespace

import pytest

os.environ.pop("DATABASE_URL", None)
os.environ.pop("OPENAI_API_KEY", None)
os.environ["KPI_DB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="kpilibrary-tests-"), "bootstrap.db")
os.environ["AUTH_TOKEN_SECRET"] = "test-secret"
os.environ["ADMIN_API_KEYS"] = "test-admin-key"
os.environ["MAYAR_WEBHOOK_SECRET"] = "mayar-test-secret"
os.environ["APP_TIMEZONE"] = "Asia/Jakarta"
os.environ["EMAIL_PROVIDER"] = "auto"

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402

ADMIN_HEADERS = {"x-admin-key": "test-admin-key"}


class FakeCompletions:
    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        content = self.responder(kwargs["messages"][-1]["content"])
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeOpenAI:
    def __init__(self, responder):
        self.chat = SimpleNamespace(completions=FakeCompletions(responder))

    @property
    def calls(self):
        return self.chat.completions.calls


def kpi_response(*names, perspective="Financial", kpi_type="Outcome"):
    return json.dumps(
        {
            "kpis": [
                {
                    "perspective": perspective,
                    "kpi_name": name,
                    "type": kpi_type,
                    "definition": f"Definition of {name}",
                    "formula": "a / b",
                    "unit": "%",
                }
                for name in names
            ]
        }
    )


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "DB_PATH", str(tmp_path / "kpilibrary.db"))
    main.init_db()
    yield


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    state = {"today": "2026-03-02"}
    monkeypatch.setattr(main, "local_today", lambda: state["today"])
    # 05:00 UTC falls on the same calendar day in Asia/Jakarta.
    monkeypatch.setattr(main, "now_utc_iso", lambda: f"{state['today']}T05:00:00+00:00")
    return state


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    outbox = []

    def fake_send(to_email, subject, text_body):
        outbox.append({"to": to_email, "subject": subject, "body": text_body})
        return None

    monkeypatch.setattr(main, "send_email_message", fake_send)
    return outbox


@pytest.fixture
def fake_llm(monkeypatch):
    def install(responder):
        fake = FakeOpenAI(responder)
        monkeypatch.setattr(main, "client", fake)
        return fake

    install(lambda prompt: kpi_response("Revenue Growth", "Customer Retention"))
    return install


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user():
    def create(email="user@example.com", password="secret123", role="user", free_tokens=None, paid_tokens=0):
        user = main.create_user_account(
            email,
            password,
            role=role,
            free_tokens=free_tokens,
            paid_tokens=paid_tokens,
        )
        token = main.create_auth_token(int(user["id"]), str(user["email"]))
        return SimpleNamespace(
            id=int(user["id"]),
            email=str(user["email"]),
            headers={"Authorization": f"Bearer {token}"},
        )

    return create


def wallet_of(user_id):
    row = main.fetch_user_by_id(user_id)
    return int(row["free_tokens"]), int(row["paid_tokens"])


def transactions_of(user_id):
    return list(reversed(main.fetch_token_history(user_id, 500)))
