import main


def sample_kpis():
    return [
        {"kpi_name": "Revenue Growth", "perspective": "Financial", "type": "Outcome", "definition": "Year over year sales"},
        {"kpi_name": "Training Hours", "perspective": "Learning & Growth", "type": "Activity", "definition": "Hours spent learning"},
    ]


def library_entries():
    return [
        {"id": 1, "job_title": "Sales Manager", "updated_at": "2026-03-02", "kpis": sample_kpis()},
        {
            "id": 2,
            "job_title": "HR Officer",
            "updated_at": "2026-03-01",
            "kpis": [{"kpi_name": "Time to Hire", "perspective": "Internal Process", "type": "Output", "definition": "Days to fill a role"}],
        },
    ]


def test_save_then_list_library(client, make_user):
    user = make_user()

    saved = client.post("/library", json={"job_title": " Sales  Manager ", "kpis": sample_kpis()}, headers=user.headers)
    listed = client.get("/library", headers=user.headers)

    assert saved.status_code == 200
    entry = saved.json()["entry"]
    assert entry["job_title"] == "Sales Manager"
    assert entry["kpi_count"] == 2
    assert entry["created"] is True
    assert all(kpi["id"] for kpi in entry["kpis"])
    assert listed.json()["count"] == 1
    assert listed.json()["items"][0]["id"] == entry["id"]


def test_save_overwrites_entry_with_same_title(client, make_user):
    user = make_user()
    first = client.post("/library", json={"job_title": "Sales Manager", "kpis": sample_kpis()}, headers=user.headers)

    second = client.post(
        "/library",
        json={"job_title": "sales manager", "kpis": [{"kpi_name": "Win Rate", "perspective": "Customer"}]},
        headers=user.headers,
    )

    assert second.json()["entry"]["id"] == first.json()["entry"]["id"]
    assert second.json()["entry"]["created"] is False
    assert [kpi["kpi_name"] for kpi in second.json()["entry"]["kpis"]] == ["Win Rate"]
    assert len(main.list_library_entries(user.id)) == 1


def test_entries_are_private_to_their_owner(client, make_user):
    owner = make_user("owner@example.com")
    other = make_user("other@example.com")
    entry_id = client.post("/library", json={"job_title": "Analyst", "kpis": sample_kpis()}, headers=owner.headers).json()["entry"]["id"]

    assert client.get(f"/library/{entry_id}", headers=other.headers).status_code == 404
    assert client.put(f"/library/{entry_id}", json={"kpis": []}, headers=other.headers).status_code == 404
    assert client.delete(f"/library/{entry_id}", headers=other.headers).status_code == 404
    assert client.get("/library", headers=other.headers).json()["items"] == []
    assert client.get(f"/library/{entry_id}", headers=owner.headers).status_code == 200


def test_update_and_delete_entry(client, make_user):
    user = make_user()
    entry_id = client.post("/library", json={"job_title": "Analyst", "kpis": sample_kpis()}, headers=user.headers).json()["entry"]["id"]

    updated = client.put(f"/library/{entry_id}", json={"kpis": sample_kpis()[:1]}, headers=user.headers)
    deleted = client.delete(f"/library/{entry_id}", headers=user.headers)

    assert updated.json()["entry"]["kpi_count"] == 1
    assert deleted.json() == {"deleted": True, "id": entry_id}
    assert client.get(f"/library/{entry_id}", headers=user.headers).status_code == 404


def test_role_view_matches_title_or_kpi():
    entries = library_entries()

    assert [e["id"] for e in main.filter_library(entries, query="sales")] == [1]
    assert [e["id"] for e in main.filter_library(entries, query="hire")] == [2]
    assert [e["id"] for e in main.filter_library(entries)] == [1, 2]
    assert main.filter_library(entries, query="nothing matches") == []


def test_role_view_applies_role_and_facet_filters():
    entries = library_entries()

    assert [e["id"] for e in main.filter_library(entries, role="HR Officer")] == [2]
    assert [e["id"] for e in main.filter_library(entries, query="revenue", perspective="Financial")] == [1]
    assert [e["id"] for e in main.filter_library(entries, query="revenue", perspective="Customer")] == []


def test_kpi_view_flattens_with_parent_fields():
    entries = library_entries()

    kpis = main.filter_library(entries, view="kpis", perspective="Learning & Growth")

    assert len(kpis) == 1
    assert kpis[0]["kpi_name"] == "Training Hours"
    assert kpis[0]["parent_job_title"] == "Sales Manager"
    assert kpis[0]["parent_id"] == 1


def test_kpi_view_matches_parent_title_and_type():
    entries = library_entries()

    by_title = main.filter_library(entries, query="sales manager", view="kpis")
    by_type = main.filter_library(entries, kpi_type="Output", view="kpis")

    assert [kpi["kpi_name"] for kpi in by_title] == ["Revenue Growth", "Training Hours"]
    assert [kpi["kpi_name"] for kpi in by_type] == ["Time to Hire"]


def test_library_endpoint_filters_and_facets(client, make_user):
    user = make_user()
    client.post("/library", json={"job_title": "Sales Manager", "kpis": sample_kpis()}, headers=user.headers)
    client.post("/library", json={"job_title": "HR Officer", "kpis": library_entries()[1]["kpis"]}, headers=user.headers)

    kpi_view = client.get("/library", params={"view": "kpis", "type": "Activity"}, headers=user.headers)
    facets = client.get("/library/facets", headers=user.headers)
    bad_view = client.get("/library", params={"view": "table"}, headers=user.headers)

    assert [kpi["kpi_name"] for kpi in kpi_view.json()["items"]] == ["Training Hours"]
    assert facets.json() == {
        "roles": ["HR Officer", "Sales Manager"],
        "perspectives": ["Financial", "Internal Process", "Learning & Growth"],
        "types": ["Activity", "Outcome", "Output"],
    }
    assert bad_view.status_code == 400
