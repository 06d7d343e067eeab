"""Thin HTTP client for the survey API.

Example::

    admin = SurveyClient("http://localhost:8000", api_key="secret", store_id=1)
    survey = admin.create_survey({"title": "Q3 pulse"})["survey"]
    admin.activate(survey["id"])

    public = SurveyClient("http://localhost:8000")
    public.save_progress(token, answers=[{"question_id": "q1", "value": 8}])
    public.submit(token)
"""
from __future__ import annotations
import logging
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)


class SurveyClientError(Exception):
    """Non-2xx answer from the API.

    Attributes:
        status_code (int): HTTP status.
        detail (str): Human readable message.
        reason (str|None): Domain error code, e.g. "TokenExpired".
    """

    def __init__(self, status_code: int, detail: str, reason: Optional[str] = None):
        self.status_code = status_code
        self.detail = detail
        self.reason = reason
        super().__init__(f"{status_code} {reason}: {detail}" if reason else f"{status_code}: {detail}")


class SurveyClient:
    def __init__(self, base_url: str, api_key: Optional[str] = None, store_id: Optional[int] = None,
                 session: Optional[requests.Session] = None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["X-API-Key"] = api_key
        if store_id is not None:
            self.session.headers["X-Store-Id"] = str(store_id)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            detail = body.get("detail") if isinstance(body, dict) else None
            reason = body.get("reason") if isinstance(body, dict) else None
            logger.debug("%s %s failed: %s %s", method, path, resp.status_code, detail)
            raise SurveyClientError(resp.status_code, str(detail or resp.text), reason)
        return resp

    def _json(self, method: str, path: str, **kwargs) -> Any:
        return self._request(method, path, **kwargs).json()

    # ------------------------
    # Admin
    # ------------------------
    def health(self) -> dict:
        return self._json("GET", "/health")

    def create_employee(self, employee: dict) -> dict:
        return self._json("POST", "/admin/employees", json=employee)

    def list_employees(self) -> list[dict]:
        return self._json("GET", "/admin/employees")

    def dashboard(self) -> dict:
        return self._json("GET", "/surveys/dashboard")

    def create_survey(self, survey: dict) -> dict:
        return self._json("POST", "/surveys", json=survey)

    def list_surveys(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
        params = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        return self._json("GET", "/surveys", params=params)

    def get_survey(self, survey_id: int) -> dict:
        return self._json("GET", f"/surveys/{survey_id}")

    def update_survey(self, survey_id: int, changes: dict) -> dict:
        return self._json("PUT", f"/surveys/{survey_id}", json=changes)

    def delete_survey(self, survey_id: int) -> dict:
        return self._json("DELETE", f"/surveys/{survey_id}")

    def activate(self, survey_id: int) -> dict:
        return self._json("POST", f"/surveys/{survey_id}/activate")

    def activate_now(self, survey_id: int) -> dict:
        return self._json("POST", f"/surveys/{survey_id}/activate-now")

    def close(self, survey_id: int) -> dict:
        return self._json("POST", f"/surveys/{survey_id}/close")

    def archive(self, survey_id: int) -> dict:
        return self._json("POST", f"/surveys/{survey_id}/archive")

    def generate_tokens(self, survey_id: int, employee_ids: list[int]) -> list[dict]:
        return self._json("POST", f"/surveys/{survey_id}/generate-tokens",
                          json={"employee_ids": employee_ids})["tokens"]

    def send_reminders(self, survey_id: int) -> dict:
        return self._json("POST", f"/surveys/{survey_id}/send-reminders")

    def analytics(self, survey_id: int, **filters: Optional[str]) -> dict:
        """Analytics with optional department / position / experience_level / employment_type filters."""
        names = {"experience_level": "experienceLevel", "employment_type": "employmentType"}
        params = {names.get(k, k): v for k, v in filters.items() if v}
        return self._json("GET", f"/surveys/{survey_id}/analytics", params=params)

    def export(self, survey_id: int) -> dict:
        return self._json("GET", f"/surveys/{survey_id}/export")

    def export_csv(self, survey_id: int) -> str:
        return self._request("GET", f"/surveys/{survey_id}/export.csv").text

    # ------------------------
    # Public (token holders)
    # ------------------------
    def get_by_token(self, token: str) -> dict:
        return self._json("GET", f"/surveys/token/{token}")

    def save_progress(self, token: str, answers: Optional[list[dict]] = None,
                      demographics: Optional[dict] = None, device_info: Optional[dict] = None) -> dict:
        body = {"answers": answers or []}
        if demographics:
            body["demographics"] = demographics
        if device_info:
            body["device_info"] = device_info
        return self._json("POST", f"/surveys/token/{token}/response", json=body)

    def submit(self, token: str, answers: Optional[list[dict]] = None,
               demographics: Optional[dict] = None) -> dict:
        body = None
        if answers or demographics:
            body = {"answers": answers or [], "demographics": demographics}
        return self._json("POST", f"/surveys/token/{token}/submit", json=body)
