"""
Tests for domain models in `carelink/domain/`.

Covers:
- camelCase wire aliases on the descriptor and stream frames
- Stable priority ordering of enabled candidates
- Health cache freshness
- Result helpers
"""

from __future__ import annotations

import json

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from carelink.domain.models import (
    BackendDescriptor,
    Candidate,
    HealthCacheEntry,
    MessageType,
    RiskLevel,
    StreamMessage,
)
from carelink.domain.result import Result
from carelink.errors import ApiError, NoBackendAvailableError


class TestBackendDescriptor:
    def test_parses_wire_format(self) -> None:
        descriptor = BackendDescriptor.model_validate(
            {
                "backends": [
                    {
                        "name": "local",
                        "apiUrl": "http://localhost:3000",
                        "wsUrl": "ws://localhost:3000",
                        "priority": 1,
                    },
                    {
                        "name": "cloud",
                        "apiUrl": "/api",
                        "wsUrl": "",
                        "priority": 2,
                        "enabled": False,
                    },
                ],
                "healthCheckEndpoint": "/status",
                "healthCheckTimeout": 1500,
                "autoSelect": False,
            }
        )

        assert descriptor.health_check_endpoint == "/status"
        assert descriptor.health_check_timeout_seconds == 1.5
        assert descriptor.auto_select is False
        assert descriptor.backends[0].api_url == "http://localhost:3000"
        assert descriptor.backends[0].enabled is True
        assert [c.name for c in descriptor.enabled_candidates()] == ["local"]

    def test_defaults(self) -> None:
        descriptor = BackendDescriptor.model_validate({"backends": []})

        assert descriptor.health_check_endpoint == "/health"
        assert descriptor.health_check_timeout == 3000
        assert descriptor.auto_select is True

    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValidationError):
            BackendDescriptor.model_validate({"backends": [], "healthCheckTimeout": 0})

    @given(st.lists(st.tuples(st.integers(-5, 5), st.booleans()), max_size=30))
    def test_enabled_candidates_sorted_stably(self, specs: list[tuple[int, bool]]) -> None:
        backends = [
            Candidate(name=f"b{i}", api_url=f"/b{i}", ws_url="", priority=p, enabled=e)
            for i, (p, e) in enumerate(specs)
        ]
        descriptor = BackendDescriptor(backends=backends)

        ordered = descriptor.enabled_candidates()

        assert all(c.enabled for c in ordered)
        assert len(ordered) == sum(1 for _, e in specs if e)
        keys = [(c.priority, int(c.name[1:])) for c in ordered]
        assert keys == sorted(keys)


class TestHealthCacheEntry:
    def test_freshness_boundary(self) -> None:
        entry = HealthCacheEntry(candidate_key="/api", is_available=False, last_checked_at=100.0)

        assert entry.is_fresh(159.9, 60.0)
        assert not entry.is_fresh(160.0, 60.0)


class TestStreamMessage:
    def test_risk_alert_from_wire(self) -> None:
        message = StreamMessage.model_validate(
            {
                "type": "risk_alert",
                "elderId": "e1",
                "elderName": "Wu",
                "level": "critical",
                "extra": 1,
            }
        )

        assert message.type is MessageType.RISK_ALERT
        assert message.level is RiskLevel.CRITICAL
        assert message.elder_name == "Wu"
        assert not message.is_liveness

    def test_heartbeat_is_liveness(self) -> None:
        assert StreamMessage(type=MessageType.HEARTBEAT).is_liveness

    def test_to_wire_uses_aliases(self) -> None:
        message = StreamMessage(type=MessageType.NEW_REPORT, elder_id="e2", data={"reportId": 9})

        assert json.loads(message.to_wire()) == {
            "type": "new_report",
            "elderId": "e2",
            "data": {"reportId": 9},
        }

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StreamMessage.model_validate({"type": "mystery"})


class TestResult:
    def test_ok(self) -> None:
        result: Result[int, ValueError] = Result.ok(3)

        assert result.is_ok() and not result.is_err()
        assert result.unwrap() == 3
        assert result.unwrap_or(0) == 3
        with pytest.raises(ValueError, match="unwrap_err"):
            result.unwrap_err()

    def test_err(self) -> None:
        error = NoBackendAvailableError()
        result: Result[int, NoBackendAvailableError] = Result.err(error)

        assert result.is_err()
        assert result.unwrap_or(7) == 7
        assert result.unwrap_err() is error
        with pytest.raises(NoBackendAvailableError):
            result.unwrap()

    def test_requires_exactly_one_side(self) -> None:
        with pytest.raises(ValueError):
            Result()
        with pytest.raises(ValueError):
            Result(value=1, error=ValueError("x"))


def test_api_error_message_includes_status() -> None:
    error = ApiError("not found", status_code=404, payload={"code": "E404"})

    assert str(error) == "HTTP 404: not found"
    assert error.to_dict() == {"code": "E404", "success": False, "message": "not found"}
