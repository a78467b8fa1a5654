"""
Unit tests for the rate-limit client key.
"""

import pytest
from starlette.requests import Request

from api.middleware.rate_limit import client_ip


def _request(headers: dict[str, str] | None = None, peer: str = "10.0.0.5") -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/billing/webhook",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (peer, 443),
    }
    return Request(scope)


class TestClientIp:
    def test_first_forwarded_address(self):
        request = _request({"X-Forwarded-For": "54.187.174.169, 10.0.0.1"})

        assert client_ip(request) == "54.187.174.169"

    def test_real_ip_header(self):
        assert client_ip(_request({"X-Real-IP": "3.18.12.63"})) == "3.18.12.63"

    @pytest.mark.parametrize("forwarded", ["192.168.1.4", "127.0.0.1", "not-an-ip", ""])
    def test_unusable_forwarded_address_falls_back_to_peer(self, forwarded):
        assert client_ip(_request({"X-Forwarded-For": forwarded})) == "10.0.0.5"
