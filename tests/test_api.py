"""API tests for calculated field and metric routes."""

from calcdash.config import settings

DATASET = "/datasets/deals"


def _create(client, slug, formula, formula_type="expression", **extra):
    payload = {"field_slug": slug, "formula": formula, "formula_type": formula_type, **extra}
    return client.post(f"{DATASET}/fields", json=payload)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


# ── Calculated fields ──


def test_create_and_list_fields(client):
    response = _create(client, "commission", "amount * 0.1")
    assert response.status_code == 201
    assert response.json()["field"]["field_slug"] == "commission"
    assert response.json()["field"]["dataset_id"] == "deals"

    listing = client.get(f"{DATASET}/fields").json()
    assert listing["count"] == 1
    assert listing["fields"][0]["formula"] == "amount * 0.1"


def test_fields_are_scoped_per_dataset(client):
    _create(client, "commission", "amount * 0.1")
    assert client.get("/datasets/other/fields").json()["count"] == 0
    assert client.post("/datasets/other/fields", json={
        "field_slug": "commission", "formula": "amount", "formula_type": "expression",
    }).status_code == 201


def test_duplicate_slug_is_a_conflict(client):
    _create(client, "commission", "amount * 0.1")
    assert _create(client, "commission", "amount * 0.2").status_code == 409


def test_invalid_slug_is_rejected(client):
    assert _create(client, "2x", "amount * 2").status_code == 400
    assert _create(client, "where", "amount * 2").status_code == 400


def test_malformed_formula_is_not_saved(client):
    response = _create(client, "broken", "amount *")
    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "syntax_error"
    assert client.get(f"{DATASET}/fields").json()["count"] == 0


def test_unknown_reference_with_known_fields(client):
    response = _create(client, "net", "amount - fees", known_fields=["amount"])
    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "unresolved_reference"


def test_edit_that_closes_a_cycle_is_rejected(client):
    _create(client, "tax", "amount * 0.1")
    _create(client, "total_with_tax", "amount + tax")

    response = client.put(f"{DATASET}/fields/tax", json={"formula": "total_with_tax * 0.1"})

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error_type"] == "circular_dependency"
    assert detail["cycle"] == ["tax", "total_with_tax", "tax"]
    saved = {f["field_slug"]: f["formula"] for f in client.get(f"{DATASET}/fields").json()["fields"]}
    assert saved["tax"] == "amount * 0.1"


def test_validate_endpoint_does_not_save(client):
    _create(client, "tax", "amount * 0.1")
    response = client.post(
        f"{DATASET}/fields/validate",
        json={"formula": "tax + 1", "formula_type": "expression", "field_slug": "tax"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is False
    assert body["cycle"] == ["tax", "tax"]

    ok = client.post(
        f"{DATASET}/fields/validate",
        json={"formula": "amount + tax", "formula_type": "expression"},
    ).json()
    assert ok["valid"] is True


def test_update_and_missing_field(client):
    _create(client, "commission", "amount * 0.1")
    response = client.put(
        f"{DATASET}/fields/commission",
        json={"formula": "amount * 0.2", "display_name": "Commission"},
    )
    assert response.status_code == 200
    assert response.json()["field"]["formula"] == "amount * 0.2"
    assert response.json()["field"]["display_name"] == "Commission"

    assert client.put(f"{DATASET}/fields/nope", json={"formula": "1"}).status_code == 404
    assert client.delete(f"{DATASET}/fields/nope").status_code == 404


def test_delete_deactivates(client):
    _create(client, "commission", "amount * 0.1")
    response = client.delete(f"{DATASET}/fields/commission")
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    assert client.get(f"{DATASET}/fields").json()["count"] == 0
    everything = client.get(f"{DATASET}/fields", params={"include_inactive": True}).json()
    assert everything["count"] == 1
    assert everything["fields"][0]["is_active"] is False


def test_evaluate_batch(client):
    _create(client, "tax", "amount * 0.5")
    _create(client, "total_with_tax", "amount + tax")
    _create(client, "paid_total", 'SUM(amount WHERE status = "paid")', "aggregation")

    response = client.post(
        f"{DATASET}/evaluate",
        json={
            "records": [
                {"amount": 100, "status": "paid"},
                {"amount": "abc", "status": "open"},
            ],
            "now": "2026-03-15T12:00:00Z",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["rows"][0]["total_with_tax"] == 150
    assert body["rows"][1]["tax"] is None
    assert body["aggregations"] == {"paid_total": 100}
    assert {(e["record_index"], e["field_slug"]) for e in body["errors"]} == {
        (1, "tax"),
        (1, "total_with_tax"),
    }


def test_oversized_batch_is_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "max_batch_records", 2)
    response = client.post(f"{DATASET}/evaluate", json={"records": [{}, {}, {}]})
    assert response.status_code == 413


def test_widget_preview_uses_derived_columns(client):
    _create(client, "tier", 'amount > 150 ? "big" : "small"', "conditional")
    response = client.post(
        f"{DATASET}/widgets/preview",
        json={
            "config": {"field": "amount", "aggregation": "sum", "group_by": "tier"},
            "records": [{"amount": 100}, {"amount": 200}, {"amount": 300}],
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["value"] == 600
    assert [(g["key"], g["value"]) for g in body["groups"]] == [("big", 500), ("small", 100)]


# ── Metrics ──

SHOW_RATE = {
    "name": "Show rate",
    "formula_type": "percentage",
    "numerator_conditions": [{"field": "event_outcome", "operator": "equals", "value": "showed"}],
}


def test_metric_crud(client):
    created = client.post("/metrics", json=SHOW_RATE)
    assert created.status_code == 201
    metric = created.json()["metric"]
    assert metric["id"] == "1"
    assert metric["numerator_conditions"][0]["value"] == "showed"

    updated = client.put("/metrics/1", json={**SHOW_RATE, "name": "Attendance"})
    assert updated.status_code == 200
    assert updated.json()["metric"]["name"] == "Attendance"

    assert client.get("/metrics").json()["count"] == 1
    assert client.delete("/metrics/1").status_code == 200
    assert client.get("/metrics").json()["count"] == 0
    assert client.put("/metrics/99", json=SHOW_RATE).status_code == 404


def test_sum_metric_needs_a_field(client):
    assert client.post("/metrics", json={"formula_type": "sum"}).status_code == 400


def test_compute_saved_metrics(client):
    client.post("/metrics", json=SHOW_RATE)
    client.post("/metrics", json={"name": "Revenue", "formula_type": "sum",
                                  "data_source": "payments", "numerator_field": "amount"})

    response = client.post(
        "/metrics/compute",
        json={
            "sources": {
                "events": [
                    {"event_outcome": "showed", "scheduled_at": "2026-03-02T10:00:00Z"},
                    {"event_outcome": "no_show", "scheduled_at": "2026-03-03T10:00:00Z"},
                    {"event_outcome": "showed", "scheduled_at": "2026-04-03T10:00:00Z"},
                ],
                "payments": [{"amount": 1250, "payment_date": "2026-03-04T10:00:00Z"}],
            },
            "start_date": "2026-03-01T00:00:00Z",
            "end_date": "2026-03-31T23:59:59Z",
        },
    )

    assert response.status_code == 200
    values = response.json()["values"]
    assert values["1"]["formatted_value"] == "50%"
    assert values["1"]["breakdown"] == {"numerator": 1, "denominator": 2}
    assert values["2"]["formatted_value"] == "$1,250"


def test_compute_subset_of_metrics(client):
    client.post("/metrics", json=SHOW_RATE)
    client.post("/metrics", json={"formula_type": "count"})
    response = client.post("/metrics/compute", json={"sources": {"events": []}, "metric_ids": ["2"]})
    assert set(response.json()["values"]) == {"2"}


def test_preview_metric(client):
    response = client.post(
        "/metrics/preview",
        json={
            "metric": {**SHOW_RATE, "include_no_shows": False},
            "records": [{"event_outcome": "showed"}, {"event_outcome": "no_show"}],
        },
    )
    assert response.status_code == 200
    assert response.json()["formatted_value"] == "100%"


def test_deactivating_edit_still_rejects_malformed_formula(client):
    _create(client, "tax", "amount * 0.1")

    response = client.put(
        f"{DATASET}/fields/tax", json={"formula": "amount * ((", "is_active": False}
    )

    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "syntax_error"
    saved = client.get(f"{DATASET}/fields", params={"include_inactive": True}).json()["fields"]
    assert saved[0]["formula"] == "amount * 0.1"
    assert saved[0]["is_active"] is True


def test_deactivating_edit_skips_the_cycle_check(client):
    _create(client, "tax", "amount * 0.1")
    _create(client, "total_with_tax", "amount + tax")
    response = client.put(
        f"{DATASET}/fields/tax", json={"formula": "total_with_tax * 0.1", "is_active": False}
    )
    assert response.status_code == 200
    assert response.json()["field"]["is_active"] is False


def test_widget_without_field_is_unprocessable(client):
    response = client.post(
        f"{DATASET}/widgets/preview",
        json={"config": {"aggregation": "avg"}, "records": [{"amount": 1}]},
    )
    assert response.status_code == 422


def test_preview_with_naive_reference_time(client):
    response = client.post(
        "/metrics/preview",
        json={
            "metric": {"formula_type": "count", "exclude_overdue_pcf": True},
            "records": [
                {"scheduled_at": "2026-03-01T10:00:00Z", "pcf_submitted": False},
                {"scheduled_at": "2026-03-01T10:00:00Z", "pcf_submitted": True},
            ],
            "now": "2026-03-15T12:00:00",
        },
    )
    assert response.status_code == 200
    assert response.json()["value"] == 1
