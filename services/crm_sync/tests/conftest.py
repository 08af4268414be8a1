"""
Shared fixtures: settings, a deterministic clock and an in-memory CRM.

The fake CRM is mounted as an httpx transport, so every test above the
client still goes through RemoteClient (auth, params, normalization).
"""

import itertools
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import httpx
import pytest

from services.crm_sync.client import RemoteClient
from services.crm_sync.helpers import base_email
from services.crm_sync.rate_limit import RateBudget
from services.crm_sync.settings import CrmSyncSettings

BASE_URL = "https://crm.test/api/v1"
BASE_PATH = "/api/v1/"

SUB_COLLECTIONS = {
    "email_addresses",
    "phone_numbers",
    "street_addresses",
    "memberships",
    "group_memberships",
    "constituent_relationships.json",
    "gifts.json",
}


@dataclass
class Call:
    method: str
    path: str
    params: Dict[str, str]
    body: Any


class FakeClock:
    """Manually advanced clock; ``sleep`` advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCrm:
    """
    In-memory CRM REST API.

    Records every call. ``fail(method, path, status)`` queues a failure
    for the next matching request; ``search_results`` overrides what a
    search returns, keyed by ("email" | "search", query).
    """

    def __init__(self):
        self.constituents: Dict[int, Dict[str, Any]] = {}
        self.records: Dict[Tuple[int, str], List[Dict[str, Any]]] = {}
        self.taxonomy: Dict[str, List[Dict[str, Any]]] = {}
        self.search_results: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.failures: Dict[Tuple[str, str], List[int]] = {}
        self.calls: List[Call] = []
        self._ids = itertools.count(100)

    # Setup helpers

    def add_constituent(self, first_name: str, last_name: str, emails=(), phones=()) -> int:
        constituent_id = next(self._ids)
        self.constituents[constituent_id] = {
            "id": constituent_id,
            "first_name": first_name,
            "last_name": last_name,
            "full_name": f"{first_name} {last_name}",
        }
        for n, email in enumerate(emails):
            self.add_record(constituent_id, "email_addresses", {
                "address": email,
                "email_address_type_id": 1,
                "email_type_name": "Home",
                "is_preferred": n == 0,
            })
        for n, phone in enumerate(phones):
            self.add_record(constituent_id, "phone_numbers", {
                "number": phone,
                "phone_number_type_id": 1,
                "phone_type_name": "Home",
                "is_preferred": n == 0,
            })
        return constituent_id

    def add_record(self, constituent_id: int, collection: str, data: Dict[str, Any]) -> int:
        record = {"id": next(self._ids), **data}
        self.records.setdefault((constituent_id, collection), []).append(record)
        return record["id"]

    def fail(self, method: str, path: str, status: int = 500, times: int = 1) -> None:
        self.failures.setdefault((method, path), []).extend([status] * times)

    # Inspection helpers

    def list(self, constituent_id: int, collection: str) -> List[Dict[str, Any]]:
        return self.records.get((constituent_id, collection), [])

    def writes(self) -> List[Call]:
        return [call for call in self.calls if call.method != "GET"]

    def calls_to(self, method: str, path: str) -> List[Call]:
        return [call for call in self.calls if call.method == method and call.path == path]

    def reset_calls(self) -> None:
        self.calls.clear()

    # Transport

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith(BASE_PATH):
            path = path[len(BASE_PATH):]
        path = path.strip("/")
        body = json.loads(request.content) if request.content else None
        params = dict(request.url.params)
        self.calls.append(Call(request.method, path, params, body))

        queued = self.failures.get((request.method, path))
        if queued:
            return httpx.Response(queued.pop(0), json={"error": "simulated failure"})

        status, data = self._route(request.method, path.split("/"), params, body)
        if data is None:
            return httpx.Response(status)
        return httpx.Response(status, json=data)

    def _route(self, method: str, parts: List[str], params: Dict[str, str], body: Any):
        if parts == ["constituents"]:
            if method == "GET":
                return 200, {"items": self._search(params)}
            if method == "POST":
                constituent_id = next(self._ids)
                self.constituents[constituent_id] = {"id": constituent_id, **body}
                return 201, self.constituents[constituent_id]

        if len(parts) == 2 and parts[0] == "constituents":
            constituent = self.constituents.get(int(parts[1]))
            if constituent is None:
                return 404, {"error": "not found"}
            if method == "GET":
                return 200, constituent
            if method == "PUT":
                constituent.update(body or {})
                return 200, constituent

        if len(parts) == 3 and parts[0] == "constituents" and parts[2] in SUB_COLLECTIONS:
            key = (int(parts[1]), parts[2])
            if method == "GET":
                return 200, {"items": list(self.records.get(key, []))}
            if method == "POST":
                return 201, {"id": self.add_record(key[0], key[1], body or {}), **(body or {})}

        if len(parts) == 4 and parts[0] == "constituents" and parts[2] in SUB_COLLECTIONS:
            records = self.records.get((int(parts[1]), parts[2]), [])
            return self._mutate_record(method, records, parts[3], body)

        if len(parts) == 2 and parts[0] in ("memberships", "group_memberships", "constituent_relationships"):
            collection = {
                "memberships": "memberships",
                "group_memberships": "group_memberships",
                "constituent_relationships": "constituent_relationships.json",
            }[parts[0]]
            record_id = parts[1].replace(".json", "")
            for (_, name), records in self.records.items():
                if name == collection and any(str(r["id"]) == record_id for r in records):
                    return self._mutate_record(method, records, record_id, body)
            return 404, {"error": "not found"}

        if len(parts) == 1 and method == "GET" and parts[0] in self.taxonomy:
            return 200, {"items": self.taxonomy[parts[0]]}

        return 404, {"error": f"no route for {method} {'/'.join(parts)}"}

    def _mutate_record(self, method: str, records: List[Dict[str, Any]], record_id: str, body: Any):
        for record in records:
            if str(record["id"]) == record_id:
                if method == "PUT":
                    record.update(body or {})
                    return 200, record
                if method == "DELETE":
                    records.remove(record)
                    return 204, None
                if method == "GET":
                    return 200, record
        return 404, {"error": "not found"}

    def _search(self, params: Dict[str, str]) -> List[Dict[str, Any]]:
        if "email" in params:
            override = self.search_results.get(("email", params["email"]))
            if override is not None:
                return override
            wanted = base_email(params["email"])
            return [
                dict(constituent) for constituent_id, constituent in self.constituents.items()
                if any(base_email(r.get("address")) == wanted
                       for r in self.list(constituent_id, "email_addresses"))
            ]
        if "search" in params:
            override = self.search_results.get(("search", params["search"]))
            if override is not None:
                return override
            wanted = params["search"].lower()
            return [
                dict(constituent) for constituent in self.constituents.values()
                if wanted in constituent.get("full_name", "").lower()
            ]
        return list(self.constituents.values())


def make_settings(**overrides) -> CrmSyncSettings:
    values = {
        "api_base_url": BASE_URL,
        "api_key": "test-key",
        "min_delay_between_requests_ms": 0,
        "retry_base_delay": 0,
        "api_max_retries": 2,
        "general_fund_id": 900,
        "_env_file": None,
    }
    values.update(overrides)
    return CrmSyncSettings(**values)


@pytest.fixture
def config() -> CrmSyncSettings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def client(config, crm, clock):
    budget = RateBudget.from_settings(config, clock=clock, sleep=clock.sleep)
    remote = RemoteClient(
        config,
        rate_budget=budget,
        sleep=clock.sleep,
        transport=httpx.MockTransport(crm),
    )
    yield remote
    remote.close()


@pytest.fixture
def taxonomy(crm):
    """A typical remote taxonomy."""
    crm.taxonomy.update({
        "funds.json": [
            {"id": 1, "name": "General Fund"},
            {"id": 2, "name": "Membership"},
        ],
        "campaigns.json": [
            {"id": 10, "name": "Membership Fees"},
            {"id": 11, "name": "WACU Programming"},
        ],
        "gift_categories.json": [
            {"id": 20, "display_name": "Memberships"},
            {"id": 21, "display_name": "Misc."},
        ],
        "gift_types.json": [
            {"id": 30, "name": "Gift"},
            {"id": 31, "name": "Other Income"},
        ],
        "payment_types.json": [
            {"id": 40, "name": "Cash"},
            {"id": 41, "name": "Credit Card"},
            {"id": 42, "name": "Check"},
        ],
        "membership_levels": [
            {"id": 50, "name": "Individual"},
            {"id": 51, "name": "Family"},
        ],
        "relationship_types": [
            {"id": 60, "name": "Parent"},
            {"id": 61, "name": "Child"},
        ],
    })
    return crm.taxonomy
