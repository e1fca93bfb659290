"""FastAPI endpoint tests."""

from stcredit.repositories.base import BalanceSnapshot

TEST_API_KEY = "test-api-key"

STOCK_REPORT = "\n".join(
    [
        ";;;;;ACME",
        ";;;;;01/01/2025;;;;;31/01/2025",
        ";;;;;PRODUTO",
        "Data;;;;;Documento",
        "05/01/2025;;;;;NF 10;;;;;;;;;;;;;120,000;;;;;;;;;",
    ]
)

ALLOCATION_ROWS = [
    {"guia_id": "g-1", "note_number": "1", "current_balance": 100},
    {"guia_id": "g-3", "note_number": "3", "current_balance": 30},
    {"guia_id": "g-2", "note_number": "2", "current_balance": 50, "opening_balance": 5},
]


def _period(**extra):
    return {"company_id": "acme", "year": 2025, "month": 1, **extra}


def test_health_check(api_test_client):
    response = api_test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_requests_without_token_are_rejected(api_test_client):
    response = api_test_client.get("/competencias/acme/2025/1")
    assert response.status_code == 401


def test_invalid_token_is_rejected(api_test_client):
    response = api_test_client.get(
        "/competencias/acme/2025/1", headers={"Authorization": "Bearer nope"}
    )
    assert response.status_code == 401


def test_api_key_is_accepted(api_test_client):
    response = api_test_client.get(
        "/competencias/acme/2025/1", headers={"Authorization": f"Bearer {TEST_API_KEY}"}
    )
    assert response.status_code == 200
    assert response.json()["confirmed"] is False


def test_invalid_month_is_rejected(api_test_client, auth_headers):
    response = api_test_client.get("/competencias/acme/2025/13", headers=auth_headers)
    assert response.status_code == 422


def test_enrichment_preview(api_test_client, auth_headers, repository):
    repository.upsert_snapshots(
        [
            BalanceSnapshot(
                company_id="acme",
                guia_id="g-1",
                note_number="123",
                competencia_ano=2024,
                competencia_mes=12,
                saldo_remanescente=40,
                quantidade_original=100,
            )
        ]
    )
    payload = _period(
        payments=[
            {"guia_id": "g-1", "note_number": "000123", "status": "UTILIZAVEL",
             "icms_st_credit": "20,00"},
            {"guia_id": "g-9", "note_number": "00099", "status": "UTILIZAVEL"},
            {"guia_id": "g-8", "note_number": "8"},
        ],
        invoices=[{"note_number": "123", "quantity": 100}],
    )

    response = api_test_client.post("/enrichment/preview", json=payload, headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert [r["guia"]["guia_id"] for r in body["rows"]] == ["g-1", "g-9"]
    assert body["rows"][0]["opening_balance"] == 40
    assert body["rows"][0]["current_balance"] == 60
    assert body["rows"][0]["icms_st_per_unit"] == 0.2
    assert body["rows"][1]["quantity"] == 0
    assert body["balances"][0]["state"] == "SUGGESTED"
    assert repository.write_count == 1


def test_competencia_confirm_conflict_between_operators(
    api_test_client, auth_headers
):
    confirmed = api_test_client.post("/competencias/acme/2025/1/confirm", headers=auth_headers)
    assert confirmed.status_code == 200
    assert confirmed.json()["locked_by"] == "operator@example.com"

    conflict = api_test_client.post(
        "/competencias/acme/2025/1/confirm",
        headers={"Authorization": f"Bearer {TEST_API_KEY}"},
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "COMPETENCIA_LOCKED"

    reopened = api_test_client.post("/competencias/acme/2025/1/reopen", headers=auth_headers)
    assert reopened.json()["confirmed"] is False


def test_balance_confirmation_requires_confirmed_competencia(api_test_client, auth_headers):
    payload = _period(
        balances=[{"guia_id": "g-1", "note_number": "1", "quantity": 10, "opening_balance": 2}]
    )
    response = api_test_client.post("/balances/confirm", json=payload, headers=auth_headers)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "COMPETENCIA_NOT_CONFIRMED"


def test_balance_confirm_edit_and_unconfirm(api_test_client, auth_headers, repository):
    api_test_client.post("/competencias/acme/2025/1/confirm", headers=auth_headers)
    note = {"guia_id": "g-1", "note_number": "1", "quantity": 10}

    confirmed = api_test_client.post(
        "/balances/confirm",
        json=_period(balances=[{**note, "opening_balance": 2}]),
        headers=auth_headers,
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["succeeded"][0]["guia_id"] == "g-1"
    [stored] = repository.list_snapshots("acme", 2025, 1)
    assert stored.saldo_remanescente == 8

    edited = api_test_client.post(
        "/balances/edit", json=_period(**note, opening_balance="3,5"), headers=auth_headers
    )
    assert edited.status_code == 200
    assert edited.json()["state"] == "CONFIRMED"
    assert repository.list_snapshots("acme", 2025, 1)[0].saldo_remanescente == 6.5

    unconfirmed = api_test_client.post(
        "/balances/unconfirm", json=_period(**note), headers=auth_headers
    )
    assert unconfirmed.status_code == 200
    assert unconfirmed.json()["confirmed"] is False
    assert repository.list_snapshots("acme", 2025, 1) == []


def test_stock_report_parse(api_test_client, auth_headers):
    response = api_test_client.post(
        "/stock-movements/parse",
        files={"file": ("movimento.csv", STOCK_REPORT.encode("utf-8"), "text/csv")},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.json()["total_exits"] == 120


def test_malformed_stock_report(api_test_client, auth_headers):
    response = api_test_client.post(
        "/stock-movements/parse",
        files={"file": ("movimento.csv", b"nothing useful", "text/csv")},
        headers=auth_headers,
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "MISSING_HEADER"


def test_allocation_compute(api_test_client, auth_headers):
    response = api_test_client.post(
        "/allocations/compute",
        json=_period(total_exits=120, rows=ALLOCATION_ROWS),
        headers=auth_headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert [r["consumed"] for r in body["rows"]] == [100, 20, 0]
    assert [r["status"] for r in body["rows"]] == ["UTILIZADO", "PARCIAL", "PENDENTE"]


def test_allocation_save(api_test_client, auth_headers, repository):
    payload = _period(total_exits=120, rows=ALLOCATION_ROWS)
    refused = api_test_client.post("/allocations/save", json=payload, headers=auth_headers)
    assert refused.status_code == 409

    api_test_client.post("/competencias/acme/2025/1/confirm", headers=auth_headers)
    saved = api_test_client.post("/allocations/save", json=payload, headers=auth_headers)

    assert saved.status_code == 200
    assert len(saved.json()["sync"]["succeeded"]) == 3
    stored = {s.guia_id: s for s in repository.list_snapshots("acme", 2025, 1)}
    assert stored["g-2"].quantidade_consumida == 20
    assert stored["g-2"].saldo_anterior == 5


def test_credit_control_flow(api_test_client, auth_headers):
    build = api_test_client.post(
        "/credit-control/build",
        json=_period(
            payments=[
                {"guia_id": "1", "note_number": "1", "status": "UTILIZAVEL",
                 "icms_st_credit": 100, "note_date": "2025-01-10"},
                {"guia_id": "2", "note_number": "2", "status": "UTILIZADO",
                 "icms_st_credit": 40, "note_date": "2025-01-11"},
            ]
        ),
        headers=auth_headers,
    )
    assert build.status_code == 200
    assert build.json()["saldo_final"] == 100

    base = "/credit-control/acme/2025/1"
    skipped = api_test_client.post(
        f"{base}/transition", json={"status": "fechado"}, headers=auth_headers
    )
    assert skipped.status_code == 409

    reviewed = api_test_client.post(
        f"{base}/transition", json={"status": "conferido"}, headers=auth_headers
    )
    assert reviewed.json()["conferido_por"] == "operator@example.com"

    noted = api_test_client.put(
        f"{base}/observations", json={"observacoes": "ok"}, headers=auth_headers
    )
    assert noted.json()["observacoes"] == "ok"


def test_confirm_after_allocation_save_keeps_consumption(
    api_test_client, auth_headers, repository
):
    api_test_client.post("/competencias/acme/2025/1/confirm", headers=auth_headers)
    api_test_client.post(
        "/allocations/save",
        json=_period(total_exits=120, rows=ALLOCATION_ROWS),
        headers=auth_headers,
    )
    writes = repository.write_count

    confirmed = api_test_client.post(
        "/balances/confirm",
        json=_period(
            balances=[{"guia_id": "g-2", "note_number": "2", "quantity": 55, "opening_balance": 5}]
        ),
        headers=auth_headers,
    )

    assert confirmed.status_code == 200
    assert repository.write_count == writes
    stored = {s.guia_id: s for s in repository.list_snapshots("acme", 2025, 1)}
    assert stored["g-2"].quantidade_consumida == 20
    assert stored["g-2"].saldo_remanescente == 30
