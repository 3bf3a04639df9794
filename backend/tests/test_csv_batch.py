import json

import pytest
from fastapi import HTTPException

import main
from conftest import kpi_response, transactions_of, wallet_of

SAMPLE_CSV = "\ufeffRole,Tugas\nHR Manager,Design onboarding\nFinance Lead,Close monthly books\n hr manager ,Run payroll\nHR Manager,Design onboarding\n,orphan task\nFinance Lead,\n\n"


def role_responder(failing_roles=()):
    def respond(prompt):
        role = prompt.split("Role: ", 1)[1].split("\n", 1)[0]
        if role in failing_roles:
            raise RuntimeError(f"model refused {role}")
        return kpi_response(f"{role} KPI A", f"{role} KPI B", perspective="Internal Process")

    return respond


def test_parse_groups_roles_case_insensitively_in_first_seen_order():
    groups = main.parse_bulk_csv(SAMPLE_CSV)

    assert [group["role"] for group in groups] == ["HR Manager", "Finance Lead"]
    assert groups[0]["tasks"] == ["Design onboarding", "Run payroll"]
    assert groups[1]["tasks"] == ["Close monthly books"]


def test_parse_accepts_header_aliases_in_any_case():
    groups = main.parse_bulk_csv("JABATAN,Tasks\nAnalyst,Build dashboards\n")

    assert groups == [{"role": "Analyst", "tasks": ["Build dashboards"], "truncated_tasks": 0}]


def test_parse_rejects_missing_header_columns():
    with pytest.raises(HTTPException) as excinfo:
        main.parse_bulk_csv("Name,Description\nAnalyst,Build dashboards\n")

    assert excinfo.value.status_code == 400


def test_parse_rejects_files_without_rows():
    with pytest.raises(HTTPException) as excinfo:
        main.parse_bulk_csv("Role,Tugas\n,\n")

    assert excinfo.value.status_code == 400


def test_parse_enforces_role_limit(monkeypatch):
    monkeypatch.setattr(main, "BATCH_MAX_ROLES", 2)
    csv_text = "Role,Tugas\nA,t\nB,t\nC,t\n"

    with pytest.raises(HTTPException) as excinfo:
        main.parse_bulk_csv(csv_text)

    assert excinfo.value.status_code == 400


def test_parse_truncates_long_task_lists(monkeypatch):
    monkeypatch.setattr(main, "BATCH_MAX_TASKS_PER_ROLE", 2)

    groups = main.parse_bulk_csv("Role,Tugas\nA,one\nA,two\nA,three\nA,four\n")

    assert groups[0]["tasks"] == ["one", "two"]
    assert groups[0]["truncated_tasks"] == 2


def test_preview_parses_without_spending(client, make_user, fake_llm):
    fake = fake_llm(role_responder())
    user = make_user()

    response = client.post("/kpis/batch/preview", json={"csv_text": SAMPLE_CSV}, headers=user.headers)

    assert response.status_code == 200
    assert response.json()["role_count"] == 2
    assert response.json()["task_count"] == 3
    assert fake.calls == []
    assert wallet_of(user.id) == (5, 0)


def test_batch_continues_past_failed_role(client, make_user, fake_llm):
    fake_llm(role_responder(failing_roles={"HR Manager"}))
    user = make_user()
    csv_text = "Role,Tugas\nHR Manager,Hire\nFinance Lead,Budget\nAnalyst,Report\n"

    response = client.post("/kpis/batch", json={"csv_text": csv_text}, headers=user.headers)

    assert response.status_code == 200
    summary = response.json()
    assert [role["status"] for role in summary["roles"]] == ["failed", "success", "success"]
    assert summary["succeeded"] == 2
    assert summary["failed"] == 1
    assert summary["tokens_spent"] == 2
    assert summary["total_kpis"] == 4
    assert summary["wallet"]["free_tokens"] == 3
    spends = [tx for tx in transactions_of(user.id) if tx["type"] == "SPEND"]
    assert [tx["description"] for tx in spends] == [
        "Batch KPI generation: Finance Lead",
        "Batch KPI generation: Analyst",
    ]
    assert sum(tx["amount"] for tx in spends) == -summary["succeeded"]


def test_batch_saves_each_role_to_library(client, make_user, fake_llm):
    fake_llm(role_responder())
    user = make_user()

    response = client.post("/kpis/batch", json={"csv_text": "Role,Tugas\nAnalyst,Report\n"}, headers=user.headers)

    entry_id = response.json()["roles"][0]["library_entry_id"]
    entry = main.fetch_library_entry(user.id, entry_id)
    assert entry["job_title"] == "Analyst"
    assert [kpi["kpi_name"] for kpi in entry["kpis"]] == ["Analyst KPI A", "Analyst KPI B"]
    assert entry["kpis"][0]["job_description"] == "Analyst"


def test_batch_can_skip_library_save(client, make_user, fake_llm):
    fake_llm(role_responder())
    user = make_user()

    response = client.post(
        "/kpis/batch",
        json={"csv_text": "Role,Tugas\nAnalyst,Report\n", "save_to_library": False},
        headers=user.headers,
    )

    assert response.json()["roles"][0]["library_entry_id"] is None
    assert main.list_library_entries(user.id) == []


def test_batch_skips_remaining_roles_when_tokens_run_out(client, make_user, fake_llm):
    fake = fake_llm(role_responder())
    user = make_user(free_tokens=1)
    csv_text = "Role,Tugas\nA,one\nB,two\nC,three\n"

    response = client.post("/kpis/batch", json={"csv_text": csv_text}, headers=user.headers)

    summary = response.json()
    assert [role["status"] for role in summary["roles"]] == ["success", "skipped", "skipped"]
    assert summary["roles"][1]["error"] == "insufficient_tokens"
    assert summary["skipped"] == 2
    assert len(fake.calls) == 1
    assert wallet_of(user.id) == (0, 0)


def test_batch_with_empty_wallet_skips_everything(client, make_user, fake_llm):
    fake = fake_llm(role_responder())
    user = make_user(free_tokens=0)

    response = client.post("/kpis/batch", json={"csv_text": "Role,Tugas\nA,one\nB,two\n"}, headers=user.headers)

    assert response.status_code == 200
    assert response.json()["skipped"] == 2
    assert fake.calls == []


def test_batch_stream_emits_ndjson_events(client, make_user, fake_llm):
    fake_llm(role_responder(failing_roles={"B"}))
    user = make_user()

    with client.stream(
        "POST",
        "/kpis/batch/stream",
        json={"csv_text": "Role,Tugas\nA,one\nB,two\n"},
        headers=user.headers,
    ) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = [json.loads(line) for line in response.iter_lines() if line]

    assert [event["event"] for event in events] == [
        "batch_started",
        "role_started",
        "role_completed",
        "role_started",
        "role_failed",
        "batch_completed",
    ]
    assert events[-1]["succeeded"] == 1
    assert events[4]["error"].startswith("RuntimeError")


def test_batch_rejects_bad_csv_before_streaming(client, make_user, fake_llm):
    user = make_user()

    response = client.post("/kpis/batch/stream", json={"csv_text": "foo,bar\n1,2\n"}, headers=user.headers)

    assert response.status_code == 400


def test_batch_skips_role_when_deduction_loses_race(client, make_user, fake_llm):
    user = make_user(free_tokens=1)

    def drain_then_respond(prompt):
        main.set_tokens(user.id, 0, 0, actor="concurrent-spend")
        return kpi_response("Late KPI")

    fake = fake_llm(drain_then_respond)
    csv_text = "Role,Tugas\nA,one\nB,two\n"

    response = client.post("/kpis/batch", json={"csv_text": csv_text}, headers=user.headers)

    summary = response.json()
    assert [role["status"] for role in summary["roles"]] == ["skipped", "skipped"]
    assert [role["error"] for role in summary["roles"]] == ["insufficient_tokens", "insufficient_tokens"]
    assert summary["succeeded"] == 0
    assert summary["tokens_spent"] == 0
    assert len(fake.calls) == 1
    spends = [tx for tx in transactions_of(user.id) if tx["type"] == "SPEND"]
    assert sum(tx["amount"] for tx in spends) == -summary["succeeded"]
    assert main.list_library_entries(user.id) == []


def test_batch_stream_reports_unexpected_failure(client, make_user, fake_llm, monkeypatch):
    fake_llm(role_responder())
    user = make_user()

    def broken_save(user_id, job_title, kpis):
        raise RuntimeError("disk full")

    monkeypatch.setattr(main, "upsert_library_entry", broken_save)

    with client.stream(
        "POST",
        "/kpis/batch/stream",
        json={"csv_text": "Role,Tugas\nA,one\nB,two\n"},
        headers=user.headers,
    ) as response:
        events = [json.loads(line) for line in response.iter_lines() if line]

    assert [event["event"] for event in events] == ["batch_started", "role_started", "batch_failed"]
    assert "unexpectedly" in events[-1]["error"]
