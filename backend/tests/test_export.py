import io, csv
HDR = {"X-API-Key": "test-key", "X-Store-Id": "1"}


def _survey_with_tokens(client, names):
    ids = []
    for name in names:
        ids.append(client.post("/admin/employees", json={"name": name}, headers=HDR).json()["id"])
    sid = client.post("/surveys", json={
        "title": "Export Survey",
        "questions": [
            {"id": "q1", "text": "Rate the kitchen", "type": "rating"},
            {"id": "q2", "text": "Ideas", "type": "text", "required": False},
            {"id": "q3", "text": "Shift", "type": "multiple_choice", "options": ["Lunch", "Dinner"]},
        ],
    }, headers=HDR).json()["survey"]["id"]
    tokens = client.post(f"/surveys/{sid}/generate-tokens", json={"employee_ids": ids}, headers=HDR).json()["tokens"]
    client.post(f"/surveys/{sid}/activate", headers=HDR)
    return sid, [t["token"] for t in tokens]

def test_export_csv_after_submit(client):
    sid, (t1, t2) = _survey_with_tokens(client, ["Ana", "Ben"])

    s = client.post(f"/surveys/token/{t1}/submit", json={
        "demographics": {"department": "Back of House"},
        "answers": [
            {"question_id": "q1", "value": 9},
            {"question_id": "q2", "value": "More staff, fewer meetings"},
            {"question_id": "q3", "value": ["Lunch", "Dinner"]},
        ],
    })
    assert s.status_code == 200, s.text
    # in progress responses are not exported
    client.post(f"/surveys/token/{t2}/response", json={"answers": [{"question_id": "q1", "value": 2}]})

    r = client.get(f"/surveys/{sid}/export.csv", headers=HDR)
    assert r.status_code == 200
    assert "text/csv" in r.headers.get("content-type", "")
    assert f"survey_{sid}_responses.csv" in r.headers.get("content-disposition", "")

    reader = csv.DictReader(io.StringIO(r.content.decode("utf-8")))
    for col in ["response_id", "submitted_at", "department", "question_id", "question", "answer", "skipped"]:
        assert col in reader.fieldnames
    rows = list(reader)
    assert [row["question_id"] for row in rows] == ["q1", "q2", "q3"]
    assert rows[0]["answer"] == "9"
    assert rows[1]["answer"] == "More staff, fewer meetings"
    assert rows[2]["answer"] == "Lunch; Dinner"
    assert {row["department"] for row in rows} == {"Back of House"}

def test_export_json(client):
    sid, (t1, _) = _survey_with_tokens(client, ["Cy", "Di"])
    client.post(f"/surveys/token/{t1}/submit", json={"answers": [{"question_id": "q1", "value": 6}]})
    j = client.get(f"/surveys/{sid}/export", headers=HDR).json()
    assert j["survey"]["title"] == "Export Survey"
    assert j["survey"]["total_responses"] == 1
    assert [q["id"] for q in j["questions"]] == ["q1", "q2", "q3"]
    assert j["responses"][0]["answers"][0]["value"] == 6
    assert "token" not in j["responses"][0]

def test_export_empty_survey_has_header_only(client):
    sid, _ = _survey_with_tokens(client, ["Ed"])
    r = client.get(f"/surveys/{sid}/export.csv", headers=HDR)
    lines = r.content.decode("utf-8").strip().splitlines()
    assert len(lines) == 1 and lines[0].startswith("response_id,")

def test_analytics_endpoint_with_filters(client):
    sid, tokens = _survey_with_tokens(client, ["F1", "F2", "F3"])
    plan = [("Back of House", 8), ("Front of House", 6), ("Back of House", 10)]
    for token, (department, score) in zip(tokens, plan):
        client.post(f"/surveys/token/{token}/submit", json={
            "demographics": {"department": department, "employment_type": "Part-time"},
            "answers": [{"question_id": "q1", "value": score}],
        })

    a = client.get(f"/surveys/{sid}/analytics", headers=HDR).json()
    assert a["survey"]["id"] == sid
    assert a["total_responses"] == 3
    assert a["overall_score"] == 8.0
    q1 = a["questions"][0]
    assert q1["average_rating"] == 8.0
    assert q1["rating_distribution"][7] == 1 and q1["rating_distribution"][9] == 1
    assert a["demographics"]["department"][0] == {"value": "Back of House", "count": 2}

    f = client.get(f"/surveys/{sid}/analytics", params={"department": "Back of House",
                                                       "employmentType": "Part-time"}, headers=HDR).json()
    assert f["total_responses"] == 2
    assert f["overall_score"] == 9.0
