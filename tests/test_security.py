# tests/test_security.py
"""Tests for app/transport/security.py: caller identity, network checks, headers."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException

from app.core.jobs.domain import UserRole

USER_ID = "11111111-1111-1111-1111-111111111111"


# ============================================================================
# Caller identity
# ============================================================================

class TestRequireCaller:
    def test_valid_headers(self):
        from app.transport.security import require_caller
        caller = require_caller(x_user_id=f" {USER_ID} ", x_user_role="Customer")
        assert caller.user_id == USER_ID
        assert caller.role == UserRole.CUSTOMER

    def test_id_is_canonicalized(self):
        from app.transport.security import require_caller
        caller = require_caller(x_user_id="AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE", x_user_role="employee")
        assert caller.user_id == "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"

    @pytest.mark.parametrize("user_id", [None, "", "   ", "user-1", "u" * 65, USER_ID + "0"])
    def test_missing_or_non_uuid_id_is_401(self, user_id):
        from app.transport.security import require_caller
        with pytest.raises(HTTPException) as exc_info:
            require_caller(x_user_id=user_id, x_user_role="employee")
        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize("role", [None, "", "admin", "superuser"])
    def test_unknown_role_is_403(self, role):
        from app.transport.security import require_caller
        with pytest.raises(HTTPException) as exc_info:
            require_caller(x_user_id=USER_ID, x_user_role=role)
        assert exc_info.value.status_code == 403


class TestRequireRole:
    def test_matching_role_passes(self):
        from app.transport.security import Caller, require_role
        check = require_role(UserRole.EMPLOYEE)
        caller = Caller(user_id="w1", role=UserRole.EMPLOYEE)
        assert check(caller=caller) is caller

    def test_other_role_is_403(self):
        from app.transport.security import Caller, require_role
        check = require_role(UserRole.CUSTOMER)
        with pytest.raises(HTTPException) as exc_info:
            check(caller=Caller(user_id="w1", role=UserRole.EMPLOYEE))
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == "Only customers can perform this action"


# ============================================================================
# Client IP / Internal network
# ============================================================================

class TestClientIP:
    @patch("app.transport.security.settings")
    def test_direct_connection(self, mock_settings):
        mock_settings.trust_proxy_headers = False
        from app.transport.security import _get_client_ip
        request = MagicMock()
        request.client.host = "1.2.3.4"
        request.headers = {}
        assert _get_client_ip(request) == "1.2.3.4"

    @patch("app.transport.security.settings")
    def test_x_forwarded_for(self, mock_settings):
        mock_settings.trust_proxy_headers = True
        from app.transport.security import _get_client_ip
        request = MagicMock()
        request.client.host = "172.17.0.1"
        request.headers = {"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}
        assert _get_client_ip(request) == "203.0.113.5"

    @patch("app.transport.security.settings")
    def test_proxy_headers_not_trusted(self, mock_settings):
        mock_settings.trust_proxy_headers = False
        from app.transport.security import _get_client_ip
        request = MagicMock()
        request.client.host = "10.0.0.5"
        request.headers = {"X-Forwarded-For": "evil.spoofed.ip"}
        assert _get_client_ip(request) == "10.0.0.5"

    @patch("app.transport.security.settings")
    def test_no_client(self, mock_settings):
        mock_settings.trust_proxy_headers = False
        from app.transport.security import _get_client_ip
        request = MagicMock()
        request.client = None
        assert _get_client_ip(request) == "unknown"


class TestInternalIP:
    def setup_method(self):
        from app.transport.security import _get_internal_networks
        _get_internal_networks.cache_clear()

    def teardown_method(self):
        from app.transport.security import _get_internal_networks
        _get_internal_networks.cache_clear()

    @patch("app.transport.security.settings")
    def test_rfc1918_10_range(self, mock_settings):
        mock_settings.internal_networks = "10.0.0.0/8,127.0.0.0/8"
        from app.transport.security import _is_internal_ip
        assert _is_internal_ip("10.0.0.1") is True

    @patch("app.transport.security.settings")
    def test_localhost(self, mock_settings):
        mock_settings.internal_networks = "127.0.0.0/8"
        from app.transport.security import _is_internal_ip
        assert _is_internal_ip("127.0.0.1") is True

    @patch("app.transport.security.settings")
    def test_external_ip(self, mock_settings):
        mock_settings.internal_networks = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8"
        from app.transport.security import _is_internal_ip
        assert _is_internal_ip("8.8.8.8") is False

    @patch("app.transport.security.settings")
    def test_invalid_ip_format(self, mock_settings):
        mock_settings.internal_networks = "10.0.0.0/8"
        from app.transport.security import _is_internal_ip
        assert _is_internal_ip("not-an-ip") is False

    @patch("app.transport.security.settings")
    def test_bad_cidr_is_skipped(self, mock_settings):
        mock_settings.internal_networks = "not-a-cidr, ,10.0.0.0/8"
        from app.transport.security import _get_internal_networks, _is_internal_ip
        assert len(_get_internal_networks()) == 1
        assert _is_internal_ip("10.1.2.3") is True


# ============================================================================
# Security headers
# ============================================================================

class TestSecurityHeaders:
    @patch("app.transport.security.settings")
    def test_owasp_headers_present(self, mock_settings):
        mock_settings.is_production = False
        mock_settings.is_staging = False
        from app.transport.security import SecurityHeaders
        response = MagicMock()
        response.headers = {}
        SecurityHeaders.add_security_headers(response)
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"
        assert "Content-Security-Policy" in response.headers

    @patch("app.transport.security.settings")
    def test_existing_cache_control_kept(self, mock_settings):
        mock_settings.is_production = False
        mock_settings.is_staging = False
        from app.transport.security import SecurityHeaders
        response = MagicMock()
        response.headers = {"Cache-Control": "max-age=60", "Server": "uvicorn"}
        SecurityHeaders.add_security_headers(response)
        assert response.headers["Cache-Control"] == "max-age=60"
        assert "Server" not in response.headers

    @patch("app.transport.security.settings")
    def test_hsts_in_staging(self, mock_settings):
        mock_settings.is_production = False
        mock_settings.is_staging = True
        from app.transport.security import SecurityHeaders
        response = MagicMock()
        response.headers = {}
        SecurityHeaders.add_security_headers(response)
        assert "Strict-Transport-Security" in response.headers

    @patch("app.transport.security.settings")
    def test_no_hsts_in_dev(self, mock_settings):
        mock_settings.is_production = False
        mock_settings.is_staging = False
        from app.transport.security import SecurityHeaders
        response = MagicMock()
        response.headers = {}
        SecurityHeaders.add_security_headers(response)
        assert "Strict-Transport-Security" not in response.headers


# ============================================================================
# Error message sanitization
# ============================================================================

class TestSanitizeErrorMessage:
    def test_dev_shows_detail(self):
        from app.transport.security import sanitize_error_message
        err = ValueError("detailed info")
        assert "detailed info" in sanitize_error_message(err, is_production=False)

    def test_production_generic_message(self):
        from app.transport.security import sanitize_error_message
        err = ValueError("detailed info")
        result = sanitize_error_message(err, is_production=True)
        assert "detailed" not in result
        assert result == "Invalid input"

    def test_production_unknown_error_type(self):
        from app.transport.security import sanitize_error_message
        err = RuntimeError("internal")
        result = sanitize_error_message(err, is_production=True)
        assert result == "An error occurred"
