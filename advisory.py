from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from entries import TimeEntry

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """You are an assistant that reviews time entries for anomalies.

Given the following time entry, decide whether the hours worked are unusually high for the given project and user.

Time entry:
- Date: {date}
- Project: {project}
- Hours: {hours}
- User: {user_name}

A typical work day is 8 hours, and it is unusual for someone to work significantly more than that on a single project.

Respond with JSON only, for example {{"confirmationNeeded": false}}. Set "confirmationNeeded" to true if the hours are unusually high, and false otherwise.
If confirmationNeeded is true, give a brief reason in the "reason" field.
"""


class RemoteAdvisoryFailure(Exception):
    """The anomaly check endpoint could not be reached or gave an unusable answer."""


@dataclass(frozen=True)
class Advisory:
    confirmation_needed: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"confirmationNeeded": self.confirmation_needed, "reason": self.reason}


NO_ANOMALY = Advisory()


class AnomalyChecker:
    """Asks a chat completion endpoint whether an entry looks unusual.

    The answer is advisory: every failure is logged and reported as
    "no anomaly". Without an endpoint the checker is disabled.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.endpoint = endpoint
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    def build_payload(self, entry: TimeEntry, user_name: str) -> Dict[str, Any]:
        prompt = PROMPT_TEMPLATE.format(
            date=entry.date.isoformat(),
            project=entry.project,
            hours=f"{entry.hours:g}",
            user_name=user_name,
        )
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0,
            "response_format": {"type": "json_object"},
        }

    def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.HTTPError as exc:
            logger.error("Anomaly check endpoint %s answered with an error", self.endpoint, exc_info=True)
            raise RemoteAdvisoryFailure(f"Anomaly check request failed: {exc}") from exc
        except requests.RequestException as exc:
            raise RemoteAdvisoryFailure(f"Anomaly check request failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteAdvisoryFailure("Anomaly check returned invalid JSON.") from exc
        if not isinstance(body, dict):
            raise RemoteAdvisoryFailure("Anomaly check returned an unexpected body.")
        return body

    @staticmethod
    def parse_response(body: Dict[str, Any]) -> Advisory:
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise RemoteAdvisoryFailure("Anomaly check response has no choices.")
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise RemoteAdvisoryFailure("Anomaly check response has no content.")
        try:
            verdict = json.loads(content.strip())
        except ValueError as exc:
            raise RemoteAdvisoryFailure("Anomaly check content is not JSON.") from exc
        if not isinstance(verdict, dict) or not isinstance(verdict.get("confirmationNeeded"), bool):
            raise RemoteAdvisoryFailure("Anomaly check content lacks confirmationNeeded.")
        reason = verdict.get("reason")
        return Advisory(
            confirmation_needed=verdict["confirmationNeeded"],
            reason=str(reason) if reason else None,
        )

    def check(self, entry: TimeEntry, user_name: str) -> Advisory:
        if not self.enabled:
            return NO_ANOMALY
        try:
            advisory = self.parse_response(self._request(self.build_payload(entry, user_name)))
        except RemoteAdvisoryFailure as exc:
            logger.warning("Treating entry %s as normal: %s", entry.id, exc)
            return NO_ANOMALY
        if advisory.confirmation_needed:
            logger.info("Entry %s flagged for confirmation: %s", entry.id, advisory.reason)
        return advisory
