from factories import (
    DOCTOR_ID,
    OTHER_DOCTOR_ID,
    PATIENT_ID,
    auth_headers,
    make_token,
    wrong_code,
)

API = "/api/v1"


def _request_otp(client, doctor_id=DOCTOR_ID, subject_id=PATIENT_ID):
    return client.post(
        f"{API}/access/otp", json={"subject_id": subject_id}, headers=auth_headers(doctor_id)
    )


def _verify_otp(client, code, doctor_id=DOCTOR_ID, subject_id=PATIENT_ID):
    return client.post(
        f"{API}/access/otp/verify",
        json={"subject_id": subject_id, "code": code},
        headers=auth_headers(doctor_id),
    )


def test_doctor_access_handshake(client, delivery, audit):
    response = _request_otp(client)
    assert response.status_code == 201
    body = response.json()
    assert body["subject_id"] == PATIENT_ID
    assert body["purpose"] == "document_access"
    assert "code" not in body
    assert delivery.sent[0]["to_address"] == "user1@example.com"

    blocked = client.get(f"{API}/patients/{PATIENT_ID}/documents", headers=auth_headers(DOCTOR_ID))
    assert blocked.status_code == 403
    assert blocked.json()["error"]["type"] == "permission_denied"

    verified = _verify_otp(client, delivery.last_code)
    assert verified.status_code == 200
    permission = verified.json()
    assert permission["granted_to_id"] == DOCTOR_ID
    assert permission["subject_id"] == PATIENT_ID
    assert permission["active"] is True

    documents = client.get(
        f"{API}/patients/{PATIENT_ID}/documents", headers=auth_headers(DOCTOR_ID)
    )
    assert documents.status_code == 200
    assert {d["id"] for d in documents.json()} == {10, 11}

    document = client.get(
        f"{API}/patients/{PATIENT_ID}/documents/10", headers=auth_headers(DOCTOR_ID)
    )
    assert document.status_code == 200
    assert document.json()["file_name"] == "report-10.pdf"

    granted = client.get(f"{API}/access/granted", headers=auth_headers(DOCTOR_ID))
    assert [p["subject_id"] for p in granted.json()] == [PATIENT_ID]
    assert "access_granted" in audit.actions()


def test_reused_code_is_rejected(client, delivery):
    _request_otp(client)
    assert _verify_otp(client, delivery.last_code).status_code == 200

    response = _verify_otp(client, delivery.last_code)
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_or_expired"


def test_code_issued_to_another_doctor_is_rejected(client, delivery):
    _request_otp(client, doctor_id=OTHER_DOCTOR_ID)

    response = _verify_otp(client, delivery.last_code)
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_or_expired"


def test_malformed_code_is_a_validation_error(client, otp_store):
    response = _verify_otp(client, "12a456")
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "validation_error"
    assert otp_store.calls == 0


def test_delivery_failure_returns_bad_gateway(client, delivery, otp_store):
    delivery.fail = True

    response = _request_otp(client)

    assert response.status_code == 502
    assert response.json()["error"]["type"] == "delivery_failed"
    assert len(otp_store.records) == 1


def test_repeated_wrong_codes_are_throttled(client, delivery):
    _request_otp(client)
    bad = wrong_code(delivery.last_code)
    for _ in range(5):
        assert _verify_otp(client, bad).status_code == 400

    response = _verify_otp(client, delivery.last_code)
    assert response.status_code == 429
    assert response.json()["error"]["type"] == "too_many_attempts"


def test_request_for_unknown_patient_is_not_found(client, delivery):
    response = _request_otp(client, subject_id=OTHER_DOCTOR_ID)
    assert response.status_code == 404
    assert delivery.sent == []


def test_patient_search(client):
    response = client.get(
        f"{API}/patients/search",
        params={"patient_code": "PAT-00000001"},
        headers=auth_headers(DOCTOR_ID),
    )
    assert response.status_code == 200
    assert response.json() == {
        "subject_id": PATIENT_ID,
        "full_name": "Jane Patient",
        "patient_code": "PAT-00000001",
        "currently_authorized": False,
    }

    missing = client.get(
        f"{API}/patients/search",
        params={"patient_code": "PAT-12345678"},
        headers=auth_headers(DOCTOR_ID),
    )
    assert missing.status_code == 404

    malformed = client.get(
        f"{API}/patients/search",
        params={"patient_code": "12345678"},
        headers=auth_headers(DOCTOR_ID),
    )
    assert malformed.status_code == 422


def test_patient_sees_and_revokes_permission(client, delivery, audit):
    _request_otp(client)
    _verify_otp(client, delivery.last_code)

    listing = client.get(f"{API}/access/permissions", headers=auth_headers(PATIENT_ID))
    assert listing.status_code == 200
    [item] = listing.json()
    assert item["counterpart_name"] == "Gregory House"
    assert item["currently_authorized"] is True

    revoked = client.post(
        f"{API}/access/permissions/{item['id']}/revoke", headers=auth_headers(PATIENT_ID)
    )
    assert revoked.status_code == 200
    assert revoked.json()["active"] is False
    assert revoked.json()["revoked_at"] is not None

    blocked = client.get(f"{API}/patients/{PATIENT_ID}/documents", headers=auth_headers(DOCTOR_ID))
    assert blocked.status_code == 403

    listing = client.get(f"{API}/access/permissions", headers=auth_headers(PATIENT_ID))
    assert listing.json()[0]["currently_authorized"] is False
    assert "access_revoked" in audit.actions()


def test_doctor_cannot_revoke(client, delivery):
    _request_otp(client)
    permission = _verify_otp(client, delivery.last_code).json()

    response = client.post(
        f"{API}/access/permissions/{permission['id']}/revoke", headers=auth_headers(DOCTOR_ID)
    )
    assert response.status_code == 403


def test_missing_token_is_unauthenticated(client):
    response = client.post(f"{API}/access/otp", json={"subject_id": PATIENT_ID})
    assert response.status_code == 401
    assert response.headers.get("WWW-Authenticate") == "Bearer"
    assert response.json()["error"]["type"] == "not_authenticated"


def test_bad_tokens_are_unauthenticated(client):
    for token in (
        make_token(DOCTOR_ID, secret="not-the-secret"),
        make_token(DOCTOR_ID, token_type="refresh"),
        make_token(999),
        "garbage",
    ):
        response = client.get(
            f"{API}/access/granted", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401


def test_inactive_user_is_forbidden(client, user_store):
    user_store._users[DOCTOR_ID].is_active = False
    response = client.get(f"{API}/access/granted", headers=auth_headers(DOCTOR_ID))
    assert response.status_code == 403


def test_patient_cannot_request_doctor_access(client):
    response = _request_otp(client, doctor_id=PATIENT_ID)
    assert response.status_code == 403
