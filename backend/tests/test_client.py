import pytest
from fastapi.testclient import TestClient

from client import SurveyClient, SurveyClientError
from main import app


@pytest.fixture
def api():
    return SurveyClient("http://testserver", api_key="test-key", store_id=1, session=TestClient(app))

def test_client_round_trip(api):
    assert api.health() == {"ok": True}
    emp = api.create_employee({"name": "Ana", "department": "Management"})
    survey = api.create_survey({"title": "Via client", "questions": [{"id": "q1", "text": "Score?"}]})["survey"]

    (issued,) = api.generate_tokens(survey["id"], [emp["id"]])
    assert api.activate(survey["id"])["survey"]["status"] == "active"

    token = issued["token"]
    assert api.get_by_token(token)["survey"]["title"] == "Via client"
    api.save_progress(token, answers=[{"question_id": "q1", "value": 7}],
                      demographics={"department": "Management"})
    assert api.submit(token)["completion_percentage"] == 100

    report = api.analytics(survey["id"], department="Management")
    assert report["total_responses"] == 1
    assert report["overall_score"] == 7.0
    assert api.analytics(survey["id"], experience_level="2+ years")["total_responses"] == 0
    assert "response_id" in api.export_csv(survey["id"])
    assert api.list_surveys(status="active")["pagination"]["total"] == 1

def test_client_raises_domain_errors(api):
    with pytest.raises(SurveyClientError) as err:
        api.get_by_token("missing")
    assert err.value.status_code == 404
    assert err.value.reason == "TokenNotFound"

    with pytest.raises(SurveyClientError) as err:
        api.get_survey(12345)
    assert err.value.status_code == 404
    assert err.value.reason is None
    assert err.value.detail == "Survey not found"
