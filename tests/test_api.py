# tests/test_api.py
from fastapi import status

from conftest import CLINIC_DAY, CLOSED_DAY

API = "/api/v1"


def _book(client, doctor, patient, start, duration=30, service=None, user_id=None):
    payload = {
        "patient_id": patient.id,
        "doctor_id": doctor.id,
        "start_time": start,
        "duration_minutes": duration,
    }
    if service is not None:
        payload["service_id"] = service.id
    headers = {"X-User-Id": user_id} if user_id else {}
    return client.post(f"{API}/appointments", json=payload, headers=headers)


def test_health(client):
    response = client.get(f"{API}/health")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "ok"


def test_booking_conflict_is_409_with_structured_body(client, doctor, patient, receptionist):
    created = _book(client, doctor, patient, "2026-10-19T10:00:00", user_id=receptionist.id)
    assert created.status_code == status.HTTP_201_CREATED
    body = created.json()
    assert body["status"] == "SCHEDULED"
    assert body["end_time"] == "2026-10-19T10:30:00"
    assert body["created_by"] == receptionist.id

    clash = _book(client, doctor, patient, "2026-10-19T10:15:00", 20)
    assert clash.status_code == status.HTTP_409_CONFLICT
    assert clash.json()["error"] == "SCHEDULING_CONFLICT"
    assert clash.json()["field"] == "start_time"

    touching = _book(client, doctor, patient, "2026-10-19T10:30:00")
    assert touching.status_code == status.HTTP_201_CREATED


def test_outside_hours_is_422(client, doctor, patient):
    response = _book(client, doctor, patient, f"{CLOSED_DAY}T10:00:00")
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert response.json()["error"] == "OUTSIDE_BUSINESS_HOURS"


def test_slots_endpoint(client, doctor, patient):
    _book(client, doctor, patient, "2026-10-19T09:00:00", 60)
    response = client.get(f"{API}/slots", params={"date": str(CLINIC_DAY), "doctor_id": doctor.id})
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["slot_minutes"] == 30
    assert body["slots"][0] == "2026-10-19T10:00:00"
    assert len(body["slots"]) == 22

    closed = client.get(f"{API}/slots", params={"date": str(CLOSED_DAY)})
    assert closed.json()["slots"] == []

    unknown = client.get(f"{API}/slots", params={"date": str(CLINIC_DAY), "doctor_id": "nobody"})
    assert unknown.status_code == status.HTTP_404_NOT_FOUND
    assert unknown.json()["error"] == "MISSING_REFERENCE"


def test_reschedule_and_list_by_day(client, doctor, patient):
    first = _book(client, doctor, patient, "2026-10-19T10:00:00").json()
    second = _book(client, doctor, patient, "2026-10-19T11:00:00").json()

    clash = client.put(f"{API}/appointments/{second['id']}/reschedule", json={"start_time": "2026-10-19T10:00:00"})
    assert clash.status_code == status.HTTP_409_CONFLICT
    assert client.get(f"{API}/appointments/{second['id']}").json()["start_time"] == "2026-10-19T11:00:00"

    moved = client.put(f"{API}/appointments/{second['id']}/reschedule", json={"start_time": "2026-10-19T12:00:00"})
    assert moved.status_code == status.HTTP_200_OK

    listed = client.get(f"{API}/appointments", params={"day": str(CLINIC_DAY), "doctor_id": doctor.id}).json()
    assert [a["id"] for a in listed] == [first["id"], second["id"]]


def test_terminal_transition_is_409(client, doctor, patient):
    appointment = _book(client, doctor, patient, "2026-10-19T10:00:00").json()
    cancelled = client.post(f"{API}/appointments/{appointment['id']}/cancel", json={"reason": "sick"})
    assert cancelled.status_code == status.HTTP_200_OK
    assert cancelled.json()["status"] == "CANCELLED"

    again = client.post(f"{API}/appointments/{appointment['id']}/confirm")
    assert again.status_code == status.HTTP_409_CONFLICT
    assert again.json()["error"] == "INVALID_STATE_TRANSITION"


def test_visit_to_paid_invoice_flow(client, doctor, patient, cleaning, root_canal):
    appointment = _book(client, doctor, patient, "2026-10-19T16:00:00", 60, service=root_canal).json()

    visit = client.post(f"{API}/appointments/{appointment['id']}/complete")
    assert visit.status_code == status.HTTP_201_CREATED
    visit = visit.json()
    assert visit["total_amount"] == "90.000"
    assert visit["procedures"][0]["serviceId"] == root_canal.id

    updated = client.put(f"{API}/visits/{visit['id']}", json={"procedures": [
        {"serviceId": cleaning.id},
        {"serviceId": root_canal.id, "tooth": "36"},
    ]})
    assert updated.json()["total_amount"] == "105.000"

    invoice = client.post(f"{API}/visits/{visit['id']}/invoice")
    assert invoice.status_code == status.HTTP_201_CREATED
    invoice = invoice.json()
    assert invoice["subtotal"] == "105.000"
    assert invoice["total_amount"] == "105.000"
    assert invoice["payment_status"] == "PENDING"
    assert invoice["invoice_number"].startswith("INV-")

    again = client.post(f"{API}/visits/{visit['id']}/invoice")
    assert again.status_code == status.HTTP_409_CONFLICT
    assert again.json()["error"] == "ALREADY_INVOICED"
    assert again.json()["context"]["invoice_id"] == invoice["id"]

    paid = client.post(f"{API}/invoices/{invoice['id']}/payments", json={"amount": "50.000", "method": "CASH"})
    assert paid.status_code == status.HTTP_201_CREATED
    assert paid.json()["amount"] == "50.000"
    assert client.get(f"{API}/invoices/{invoice['id']}").json()["payment_status"] == "PARTIAL"

    over = client.post(f"{API}/invoices/{invoice['id']}/payments", json={"amount": "55.001", "method": "KNET"})
    assert over.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert over.json()["error"] == "OVER_PAYMENT"

    client.post(f"{API}/invoices/{invoice['id']}/payments", json={"amount": "55.000", "method": "KNET"})
    final = client.get(f"{API}/invoices/{invoice['id']}").json()
    assert final["payment_status"] == "PAID"
    assert final["balance_due"] == "0.000"

    payments = client.get(f"{API}/invoices/{invoice['id']}/payments").json()
    assert sorted(p["amount"] for p in payments) == ["50.000", "55.000"]

    assert client.get(f"{API}/invoices", params={"unpaid": True}).json() == []
    assert client.get(f"{API}/health/ledger-check").json()["inconsistencies"] == []


def test_money_precision_is_never_truncated(client, patient):
    response = client.post(f"{API}/invoices", json={
        "patient_id": patient.id,
        "items": [{"description": "Consultation", "unit_price": "10.0005"}],
    })
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_manual_invoice_payment_delete_and_outstanding(client, patient):
    invoice = client.post(f"{API}/invoices", json={
        "patient_id": patient.id,
        "items": [{"description": "Consultation", "quantity": 2, "unit_price": "10.000"}],
        "discount_type": "FLAT",
        "discount_value": "5",
        "tax_percentage": "10",
    })
    assert invoice.status_code == status.HTTP_201_CREATED
    invoice = invoice.json()
    assert invoice["total_amount"] == "16.500"

    payment = client.post(f"{API}/invoices/{invoice['id']}/payments", json={"amount": "6.500", "method": "CARD"}).json()
    outstanding = client.get(f"{API}/invoices/outstanding").json()
    assert outstanding == {"invoice_count": 1, "outstanding_amount": "10.000"}

    deleted = client.delete(f"{API}/payments/{payment['id']}")
    assert deleted.status_code == status.HTTP_200_OK
    assert deleted.json()["paid_amount"] == "0.000"
    assert deleted.json()["payment_status"] == "PENDING"


def test_invoice_items_can_be_edited_until_paid(client, patient):
    invoice = client.post(f"{API}/invoices", json={
        "patient_id": patient.id,
        "items": [
            {"description": "Consultation", "unit_price": "10.000"},
            {"description": "X-ray", "unit_price": "4.000"},
        ],
    }).json()
    consultation, xray = invoice["items"]

    updated = client.put(f"{API}/invoices/{invoice['id']}/items/{consultation['id']}", json={"quantity": 2})
    assert updated.status_code == status.HTTP_200_OK
    assert updated.json()["total_amount"] == "24.000"

    removed = client.delete(f"{API}/invoices/{invoice['id']}/items/{xray['id']}")
    assert removed.status_code == status.HTTP_200_OK
    assert [item["description"] for item in removed.json()["items"]] == ["Consultation"]
    assert removed.json()["total_amount"] == "20.000"

    missing = client.delete(f"{API}/invoices/{invoice['id']}/items/{xray['id']}")
    assert missing.status_code == status.HTTP_404_NOT_FOUND

    client.post(f"{API}/invoices/{invoice['id']}/payments", json={"amount": "5.000", "method": "CASH"})
    frozen = client.put(f"{API}/invoices/{invoice['id']}/items/{consultation['id']}", json={"unit_price": "1.000"})
    assert frozen.status_code == status.HTTP_409_CONFLICT
    assert frozen.json()["error"] == "INVALID_STATE_TRANSITION"


def test_service_catalogue(client):
    created = client.post(f"{API}/services", json={"code": "EXT", "name": "Extraction", "price": "25.000"})
    assert created.status_code == status.HTTP_201_CREATED
    assert created.json()["price"] == "25.000"

    duplicate = client.post(f"{API}/services", json={"code": "EXT", "name": "Extraction", "price": "25.000"})
    assert duplicate.status_code == status.HTTP_400_BAD_REQUEST

    assert [s["code"] for s in client.get(f"{API}/services").json()] == ["EXT"]
