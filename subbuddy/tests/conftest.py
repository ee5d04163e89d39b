"""Pytest configuration for subbuddy service tests

WHAT: Shared fakes (log recorder, credential store, text generator) and
      httpx.MockTransport helpers for the three external APIs
WHY: No test touches the network or the real credential file
REFERENCES:
    - subbuddy/services/*.py
"""

import json
import os
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest

# Must be URL-safe base64-encoded 32-byte string (security.build_cipher validates it)
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("SENTRY_DSN", "")

from subbuddy.services.credential_store import CredentialResolver, CredentialScope, CredentialStore
from subbuddy.services.text_gen_client import TextGenClient

FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Logging
# ============================================================================

class LogRecorder:
    """Stands in for `app_log`; keeps (message, level, category) tuples."""

    def __init__(self):
        self.entries: List[Tuple[str, str, str]] = []

    def __call__(self, message, level="info", category="App"):
        self.entries.append((message, str(level), category))

    def messages(self, level: Optional[str] = None) -> List[str]:
        return [m for m, lvl, _ in self.entries if level is None or lvl == level]


@pytest.fixture
def log():
    return LogRecorder()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


# ============================================================================
# HTTP
# ============================================================================

Handler = Callable[[httpx.Request], httpx.Response]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler: Handler):
        self.requests: List[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


def chart_payload(values, summary=None, **extra) -> Dict:
    payload = {"object": "chart", "values": values}
    if summary is not None:
        payload["summary"] = summary
    payload.update(extra)
    return payload


def overview_payload(mrr=0.0, actives=0, trials=0, new_customers=0, extra_metrics=()) -> Dict:
    metrics = [
        {"id": "mrr", "object": "overview_metric", "value": mrr},
        {"id": "active_subscriptions", "object": "overview_metric", "value": actives},
        {"id": "active_trials", "object": "overview_metric", "value": trials},
        {"id": "new_customers", "object": "overview_metric", "value": new_customers},
    ]
    metrics.extend(extra_metrics)
    return {"object": "overview_metrics", "metrics": metrics}


class RevenueCatStub:
    """Routes overview/chart requests per project to canned payloads.

    charts: {(project_id, chart_name): payload, httpx.Response, or request -> either}
    overviews: {project_id: payload, httpx.Response, or request -> either}
    """

    def __init__(self, overviews=None, charts=None):
        self.overviews: Dict[str, object] = overviews or {}
        self.charts: Dict[Tuple[str, str], object] = charts or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        # /v2/projects/{id}/metrics/overview | /v2/projects/{id}/charts/{name}
        project_id = parts[2]
        if parts[3] == "metrics":
            found = self.overviews.get(project_id)
        else:
            found = self.charts.get((project_id, parts[4]), chart_payload([]))
        if callable(found):
            found = found(request)
        if found is None:
            return httpx.Response(404, text="not found")
        if isinstance(found, httpx.Response):
            return found
        return json_response(found)


# ============================================================================
# Credentials
# ============================================================================

class FakeCredentialStore(CredentialStore):
    def __init__(self, secrets: Optional[Dict[CredentialScope, str]] = None):
        self.secrets: Dict[CredentialScope, str] = dict(secrets or {})
        self.get_calls = 0

    def get(self, scope):
        self.get_calls += 1
        return self.secrets.get(scope)

    def save(self, scope, secret):
        self.secrets[scope] = secret
        return True

    def delete(self, scope):
        self.secrets.pop(scope, None)
        return True


@pytest.fixture
def credential_store():
    return FakeCredentialStore()


@pytest.fixture
def resolver(credential_store, log):
    return CredentialResolver(credential_store, log=log)


# ============================================================================
# Text generation
# ============================================================================

class ScriptedTextGen(TextGenClient):
    """Generator replies "draft n"; critic replies come from `verdicts` (last one repeats)."""

    def __init__(self, verdicts: List[str], fail_on_call: Optional[int] = None, error=None):
        self.verdicts = verdicts
        self.fail_on_call = fail_on_call
        self.error = error
        self.calls: List[Dict] = []

    @property
    def generator_calls(self) -> List[Dict]:
        return [c for c in self.calls if c["temperature"] == 0.7]

    @property
    def critic_calls(self) -> List[Dict]:
        return [c for c in self.calls if c["temperature"] == 0.3]

    async def complete(self, api_key, messages, temperature, max_tokens):
        self.calls.append(
            {"api_key": api_key, "messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise self.error
        if temperature == 0.7:
            return f"draft {len(self.generator_calls)}"
        index = min(len(self.critic_calls), len(self.verdicts)) - 1
        return self.verdicts[index]


def dumps(payload) -> str:
    return json.dumps(payload)
