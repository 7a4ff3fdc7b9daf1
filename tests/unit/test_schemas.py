"""Tests for API schemas."""
import json
from datetime import datetime
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from access_portal.api.schemas import (
    AccessGrantCreate,
    AccessRequestCreate,
    AuditLogResponse,
    BulkCreateResponse,
    BulkIdsRequest,
    LoginRequest,
    UserCreate,
)
from access_portal.services.grants import BulkCreateResult, BulkRowResult


class TestUserCreate:
    """Test UserCreate schema."""

    def test_email_normalized(self):
        user = UserCreate(email="  Jane.Doe@Example.COM ", name="Jane Doe")
        assert user.email == "jane.doe@example.com"

    def test_invalid_email_rejected(self):
        with pytest.raises(ValidationError):
            UserCreate(email="not-an-email", name="Jane")

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            UserCreate(email="jane@example.com", name="")

    def test_blank_slack_email_becomes_none(self):
        user = UserCreate(email="jane@example.com", name="Jane", slack_email="")
        assert user.slack_email is None


class TestLoginRequest:
    def test_login_email_normalized(self):
        assert LoginRequest(email="ADMIN@example.com").email == "admin@example.com"


class TestAccessGrantCreate:
    """Test AccessGrantCreate schema."""

    def test_status_defaults_to_active(self):
        grant = AccessGrantCreate(
            user_id="u", system_instance_id="i", access_tier_id="t"
        )
        assert grant.status == "active"

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError):
            AccessGrantCreate(
                user_id="u", system_instance_id="i", access_tier_id="t", status="gone"
            )


class TestAccessRequestCreate:
    def test_items_required(self):
        with pytest.raises(ValidationError):
            AccessRequestCreate(target_user_id="u", items=[])


class TestBulkIdsRequest:
    def test_empty_ids_rejected(self):
        with pytest.raises(ValidationError):
            BulkIdsRequest(ids=[])

    def test_more_than_100_ids_rejected(self):
        with pytest.raises(ValidationError):
            BulkIdsRequest(ids=[str(i) for i in range(101)])


class TestBulkCreateResponse:
    def test_counts_from_result(self):
        result = BulkCreateResult(
            results=[
                BulkRowResult(row=1, success=False, skipped=True, error="dup"),
                BulkRowResult(row=2, success=False, error="System not found: X"),
            ]
        )
        response = BulkCreateResponse.from_result(result)
        assert response.total == 2
        assert response.success == 0
        assert response.skipped == 1
        assert response.failed == 1
        assert response.results[1].error == "System not found: X"


class TestAuditLogResponse:
    def _entry(self, details_json):
        return SimpleNamespace(
            id="a1",
            action="grant_created",
            actor_id="u1",
            target_user_id="u2",
            resource_type="access_grant",
            resource_id="g1",
            details_json=details_json,
            reason=None,
            created_at=datetime(2024, 1, 1),
        )

    def test_details_parsed(self):
        response = AuditLogResponse.from_entry(self._entry(json.dumps({"status": "active"})))
        assert response.details == {"status": "active"}

    def test_unparseable_details_kept_raw(self):
        response = AuditLogResponse.from_entry(self._entry("{oops"))
        assert response.details == {"raw": "{oops"}
