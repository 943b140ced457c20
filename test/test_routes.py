from conftest import SEPT


async def test_health(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_calculate_pay_and_audit(client, roster):
    student_id = await roster.enrolled_student()
    headers = {"X-Actor-Id": "12"}

    invoice = await client.post("/tuition/calculate", json={"student_id": student_id, "month": SEPT}, headers=headers)
    assert invoice.status_code == 200
    assert invoice.json()["total_amount"] == 900_000

    payment = await client.post(
        "/payments",
        json={
            "student_id": student_id, "amount": 400_000, "method": "cash",
            "occurred_at": "2025-09-15T10:00:00Z", "idempotency_key": "route-1",
        },
        headers=headers,
    )
    assert payment.status_code == 201
    body = payment.json()
    assert body["applied_amount"] == 400_000
    assert body["applications"][0]["status"] == "partial"

    fetched = await client.get(f"/payments/{body['payment_id']}")
    assert fetched.json()["status"] == "posted"

    audit = await client.get("/audit-trail", params={"entity": "payment"})
    assert audit.status_code == 200
    assert [item["actor_id"] for item in audit.json()["items"]] == [12]

    balances = await client.get(f"/ledger/students/{student_id}/balances")
    assert balances.json()["amount_owed"] == 500_000


async def test_validation_errors_surface_with_reason(client, roster):
    student_id = await roster.student()

    response = await client.post(
        "/payments", json={"student_id": student_id, "amount": 100_000, "method": "barter"}
    )

    assert response.status_code == 422
    assert "method" in response.json()["detail"]


async def test_not_found_and_bad_actor_header(client):
    assert (await client.get("/payments/404")).status_code == 404
    assert (await client.get("/tuition/invoices/404")).status_code == 404
    assert (await client.get("/", headers={"X-Actor-Id": "admin"})).status_code == 200
    response = await client.post(
        "/tuition/calculate", json={"student_id": 1, "month": SEPT}, headers={"X-Actor-Id": "admin"}
    )
    assert response.status_code == 400


async def test_family_payment_and_review_queue(client, roster):
    family_id = await roster.family()
    await roster.enrolled_student("Alice Tran", family_id=family_id)
    await roster.enrolled_student("Bob Tran", family_id=family_id)

    response = await client.post(
        "/payments/family",
        json={"family_id": family_id, "amount": 1_000_000, "method": "bank_transfer", "month": SEPT},
    )
    assert response.status_code == 201
    allocations = response.json()["allocations"]
    assert [a["allocated_amount"] for a in allocations] == [900_000, 100_000]

    queue = await client.get("/review-queue", params={"month": SEPT})
    assert queue.status_code == 200
    assert [g["flag_type"] for g in queue.json()["groups"]] == ["sibling_discount"]

    export = await client.get("/review-queue/export", params={"month": SEPT, "format": "csv"})
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "sibling_discount" in export.text


async def test_overlapping_discount_returns_409(client, roster):
    student_id = await roster.student()
    definition = await client.post(
        "/discounts/definitions", json={"name": "Scholarship", "type": "amount", "value": 50_000}
    )
    assert definition.status_code == 201
    payload = {"student_id": student_id, "discount_def_id": definition.json()["id"], "effective_from": "2025-09-01"}

    assert (await client.post("/discounts/assignments", json=payload)).status_code == 201
    conflict = await client.post("/discounts/assignments", json={**payload, "effective_from": "2025-12-01"})
    assert conflict.status_code == 409
