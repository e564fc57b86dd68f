"""Test doubles and payload builders shared by the test modules."""
import itertools
import json
import threading
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx

from integrations.cardcom_client import (
    CHARGE_TOKEN_PATH,
    LOW_PROFILE_CREATE_PATH,
    LOW_PROFILE_RESULT_PATH,
    VALIDATE_TOKEN_PATH,
)


class CardcomStub:
    """
    Programmable Cardcom endpoints served through ``httpx.MockTransport``.

    ``fail_statuses`` are returned (one per request) before any normal answer.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.fail_statuses: List[int] = []
        self.low_profile_error: Optional[Dict[str, Any]] = None
        self.lp_results: Dict[str, Dict[str, Any]] = {}
        self.lp_errors: Dict[str, int] = {}
        self.charge_responses: List[str] = []
        self.validate_response = (
            "ResponseCode=0&Description=OK&ExpirationDate=20300131"
            "&TokenStatus=Active&CardType=Visa"
        )
        self._ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_statuses:
            return httpx.Response(self.fail_statuses.pop(0))

        path = request.url.path
        if path == LOW_PROFILE_CREATE_PATH:
            if self.low_profile_error is not None:
                return httpx.Response(200, json=self.low_profile_error)
            low_profile_id = f"lp-{next(self._ids):04d}"
            return httpx.Response(
                200,
                json={
                    "ResponseCode": 0,
                    "Description": "OK",
                    "LowProfileId": low_profile_id,
                    "Url": f"https://secure.cardcom.solutions/EA/LPC6/{low_profile_id}",
                },
            )
        if path == LOW_PROFILE_RESULT_PATH:
            low_profile_id = json.loads(request.content)["LowProfileId"]
            if low_profile_id in self.lp_errors:
                return httpx.Response(self.lp_errors[low_profile_id])
            return httpx.Response(
                200,
                json=self.lp_results.get(
                    low_profile_id, {"ResponseCode": 700, "Description": "Not completed"}
                ),
            )
        if path == CHARGE_TOKEN_PATH:
            if self.charge_responses:
                return httpx.Response(200, text=self.charge_responses.pop(0))
            return httpx.Response(
                200,
                text=f"ResponseCode=0&Description=OK&InternalDealNumber={next(self._ids) + 90000}",
            )
        if path == VALIDATE_TOKEN_PATH:
            return httpx.Response(200, text=self.validate_response)
        if path == "/":
            return httpx.Response(200)
        return httpx.Response(404)

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def json_bodies(self, path: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests_to(path)]

    def form_bodies(self, path: str) -> List[Dict[str, str]]:
        return [dict(parse_qsl(r.content.decode())) for r in self.requests_to(path)]


class InProcessRedlock:
    """Redlock stand-in that grants each resource to one holder at a time."""

    def __init__(self) -> None:
        self._held: set = set()
        self._guard = threading.Lock()

    def lock(self, resource: str, ttl: int) -> Any:
        with self._guard:
            if resource in self._held:
                return False
            self._held.add(resource)
            return SimpleNamespace(resource=resource, validity=ttl)

    def unlock(self, lock: Any) -> None:
        with self._guard:
            self._held.discard(lock.resource)


def cardcom_result(
    low_profile_id: str,
    return_value: str,
    amount: float = 0,
    token: Optional[str] = "tok-0001",
    response_code: int = 0,
    email: Optional[str] = None,
    transaction_id: Optional[int] = 5550001,
) -> Dict[str, Any]:
    """A Cardcom webhook / GetLpResult body."""
    payload: Dict[str, Any] = {
        "ResponseCode": response_code,
        "Description": "OK" if response_code == 0 else "Card declined",
        "LowProfileId": low_profile_id,
        "ReturnValue": return_value,
        "Operation": "CreateTokenOnly" if amount == 0 else "ChargeAndCreateToken",
        "TranzactionId": transaction_id,
        "Amount": amount,
        "TranzactionInfo": {
            "TranzactionId": transaction_id,
            "Amount": amount,
            "Last4CardDigits": "4580",
            "CardMonth": 7,
            "CardYear": 2029,
            "ApprovalNumber": "0012345",
            "CardOwnerEmail": email,
        },
        "UIValues": {"CardOwnerEmail": email, "CardOwnerName": "ישראל ישראלי"},
    }
    if token:
        payload["TokenInfo"] = {
            "Token": token,
            "TokenExDate": "20300131",
            "TokenApprovalNumber": "0012345",
        }
    return payload


def approx_now(value: datetime, expected: datetime, tolerance_seconds: int = 60) -> bool:
    return abs((value - expected).total_seconds()) <= tolerance_seconds
