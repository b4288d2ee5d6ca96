import pytest

import main


def diagnosis_payload(pat, appt, **overrides):
    payload = {
        "patient": pat["id"],
        "appointment": appt["id"],
        "symptoms": [
            {"symptom": "Fever", "severity": "severe", "duration": "4 days"},
            {"symptom": "chills", "severity": "moderate"},
            {"symptom": "headache", "severity": "mild"},
        ],
        "diagnosis": {"primary": "Uncomplicated malaria", "confidence": 80},
        "malariaAssessment": {"species": "P. falciparum", "testResults": {"parasiteCount": 1200}},
    }
    payload.update(overrides)
    return payload


def test_create_embeds_assessment(client, doctor_headers, doctor_id, patient, appointment):
    resp = client.post("/api/diagnosis", headers=doctor_headers, json=diagnosis_payload(patient, appointment))

    assert resp.status_code == 201, resp.text
    body = resp.json()
    record = body["diagnosis"]
    assert record["diagnosisId"] == "D000001"
    assert record["doctor"] == doctor_id
    assert record["malariaAssessment"]["riskLevel"] == "moderate"
    assert record["malariaAssessment"]["species"] == "P. falciparum"
    assert record["malariaAssessment"]["testResults"]["rapidTest"] == "not-done"
    assert record["typhoidAssessment"]["riskLevel"] == "low"
    assert body["expertSystemRecommendations"] == {
        "malaria": {"riskLevel": "moderate", "score": 3, "recommendation": "Consider malaria testing"},
        "typhoid": {"riskLevel": "low", "score": 2, "recommendation": "Low typhoid risk"},
    }
    assert main.diagnoses_db.count() == 1


def test_positive_culture_marks_typhoid_high(client, doctor_headers, patient, appointment):
    payload = diagnosis_payload(patient, appointment, typhoidAssessment={"testResults": {"bloodCulture": "positive"}})
    resp = client.post("/api/diagnosis", headers=doctor_headers, json=payload)
    assert resp.json()["diagnosis"]["typhoidAssessment"]["riskLevel"] == "high"


def test_empty_symptoms_persist_nothing(client, doctor_headers, patient, appointment):
    resp = client.post("/api/diagnosis", headers=doctor_headers, json=diagnosis_payload(patient, appointment, symptoms=[]))

    assert resp.status_code == 400
    assert resp.json()["detail"] == "symptoms required"
    assert main.diagnoses_db.count() == 0


def test_missing_references_are_404(client, doctor_headers, patient, appointment):
    resp = client.post("/api/diagnosis", headers=doctor_headers,
                       json=diagnosis_payload(patient, appointment, patient="pat-missing"))
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Patient not found"

    resp = client.post("/api/diagnosis", headers=doctor_headers,
                       json=diagnosis_payload(patient, appointment, appointment="apt-missing"))
    assert resp.status_code == 404
    assert main.diagnoses_db.count() == 0


def test_field_validation(client, doctor_headers, patient, appointment):
    bad_primary = diagnosis_payload(patient, appointment, diagnosis={"primary": "ab"})
    assert client.post("/api/diagnosis", headers=doctor_headers, json=bad_primary).status_code == 422

    bad_species = diagnosis_payload(patient, appointment, malariaAssessment={"species": "P. unknown"})
    assert client.post("/api/diagnosis", headers=doctor_headers, json=bad_species).status_code == 422


def test_only_doctors_create(client, make_user, patient, appointment):
    nurse = make_user("nurse")
    resp = client.post("/api/diagnosis", headers=nurse, json=diagnosis_payload(patient, appointment))
    assert resp.status_code == 403


def test_update_never_rescores(client, doctor_headers, patient, appointment):
    created = client.post("/api/diagnosis", headers=doctor_headers,
                          json=diagnosis_payload(patient, appointment)).json()["diagnosis"]

    resp = client.put(f"/api/diagnosis/{created['id']}", headers=doctor_headers, json={
        "symptoms": [{"symptom": s, "severity": "severe"} for s in ("fever", "chills", "nausea", "vomiting", "sweating")],
        "malariaAssessment": {"testResults": {"microscopy": "positive"}, "complications": ["anaemia"]},
        "status": "resolved",
    })

    assert resp.status_code == 200
    updated = resp.json()["diagnosis"]
    assert updated["status"] == "resolved"
    assert updated["malariaAssessment"]["complications"] == ["anaemia"]
    assert updated["malariaAssessment"]["riskLevel"] == "moderate"
    assert updated["malariaAssessment"]["species"] == "P. falciparum"
    assert updated["malariaAssessment"]["testResults"]["microscopy"] == "positive"
    assert updated["malariaAssessment"]["testResults"]["parasiteCount"] == 1200
    assert updated["malariaAssessment"]["testResults"]["rapidTest"] == "not-done"


def test_partial_assessment_update_keeps_stored_fields(client, doctor_headers, patient, appointment):
    created = client.post("/api/diagnosis", headers=doctor_headers,
                          json=diagnosis_payload(patient, appointment)).json()["diagnosis"]

    resp = client.put(f"/api/diagnosis/{created['id']}", headers=doctor_headers,
                      json={"malariaAssessment": {"complications": ["anaemia"]}})

    malaria = resp.json()["diagnosis"]["malariaAssessment"]
    assert malaria["complications"] == ["anaemia"]
    assert malaria["species"] == "P. falciparum"
    assert malaria["testResults"] == created["malariaAssessment"]["testResults"]
    assert malaria["riskLevel"] == "moderate"


@pytest.mark.parametrize("field", ["malariaAssessment", "typhoidAssessment", "diagnosis", "status"])
def test_null_update_leaves_field_untouched(client, doctor_headers, admin_headers, patient, appointment, field):
    created = client.post("/api/diagnosis", headers=doctor_headers,
                          json=diagnosis_payload(patient, appointment)).json()["diagnosis"]

    resp = client.put(f"/api/diagnosis/{created['id']}", headers=doctor_headers, json={field: None})

    assert resp.status_code == 200
    assert resp.json()["diagnosis"][field] == created[field]
    summary = client.get("/api/admin/reports/summary", headers=admin_headers)
    assert summary.status_code == 200
    assert summary.json()["diagnoses"] == [{"primary": "Uncomplicated malaria", "count": 1}]


def test_list_is_scoped_to_doctor(client, doctor_headers, admin_headers, make_user, patient, appointment):
    client.post("/api/diagnosis", headers=doctor_headers, json=diagnosis_payload(patient, appointment))
    other = make_user("doctor", email="second.doctor@hospital.com")

    assert client.get("/api/diagnosis", headers=doctor_headers).json()["count"] == 1
    assert client.get("/api/diagnosis", headers=other).json()["count"] == 0
    assert client.get("/api/diagnosis", headers=admin_headers).json()["count"] == 1


def test_patient_sees_own_diagnoses(client, doctor_headers, admin_headers, make_user, patient, appointment):
    created = client.post("/api/diagnosis", headers=doctor_headers,
                          json=diagnosis_payload(patient, appointment)).json()["diagnosis"]
    patient_user = make_user("patient", email="amina@example.com")

    assert client.get("/api/diagnosis", headers=patient_user).json()["count"] == 0
    assert client.get(f"/api/diagnosis/{created['id']}", headers=patient_user).status_code == 403

    user_id = main.users_db.find_one(email="amina@example.com")["id"]
    client.put(f"/api/patients/{patient['id']}", headers=admin_headers, json={"userId": user_id})

    assert client.get("/api/diagnosis", headers=patient_user).json()["count"] == 1
    assert client.get(f"/api/diagnosis/{created['id']}", headers=patient_user).status_code == 200
