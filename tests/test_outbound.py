"""
tests/test_outbound.py -- Mail gateway Notifier and HTTP Geolocator.

All HTTP is mocked at the requests.Session level. Tests focus on:
  - request shape sent to the gateway / provider
  - error translation (NotificationError, None)
  - send_quietly() swallowing delivery failures
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from core.geo import GeoLocation, Geolocator, is_public_address
from core.notifier import NotificationError, NotificationKind, Notifier, render, send_quietly


def _response(status: int = 200, payload=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = payload
    if not resp.ok:
        resp.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}")
    return resp


class TestRender:
    def test_verification_body_has_link_and_expiry(self) -> None:
        subject, body = render(
            NotificationKind.VERIFICATION, {"name": "Alice", "link": "https://w.app/verify?token=abc", "minutes": 10}
        )
        assert "Verify" in subject
        assert "https://w.app/verify?token=abc" in body
        assert "10 minutes" in body

    def test_missing_placeholder_left_visible(self) -> None:
        _, body = render(NotificationKind.TWO_FACTOR_OTP, {"code": "123456"})
        assert "123456" in body
        assert "{minutes}" in body


class TestNotifier:
    def test_posts_rendered_message_to_gateway(self) -> None:
        notifier = Notifier("https://mail.example/send", "key-1", sender="Whisper <no-reply@w.app>")
        with patch.object(requests.Session, "post", return_value=_response(202)) as mock_post:
            notifier.send(NotificationKind.PASSWORD_CHANGED, "alice@example.com", {"name": "Alice"})

        args, kwargs = mock_post.call_args
        assert args[0] == "https://mail.example/send"
        assert kwargs["headers"] == {"X-API-Key": "key-1"}
        assert kwargs["json"]["to"] == "alice@example.com"
        assert kwargs["json"]["tag"] == "password_changed"
        assert "Alice" in kwargs["json"]["text"]
        notifier.close()

    def test_gateway_rejection_raises(self) -> None:
        notifier = Notifier("https://mail.example/send", "key-1")
        with patch.object(requests.Session, "post", return_value=_response(500)):
            with pytest.raises(NotificationError, match="HTTP 500"):
                notifier.send(NotificationKind.VERIFICATION, "alice@example.com", {})

    def test_connection_failure_raises(self) -> None:
        notifier = Notifier("https://mail.example/send", "key-1")
        with patch.object(requests.Session, "post", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(NotificationError, match="Connection failed"):
                notifier.send(NotificationKind.VERIFICATION, "alice@example.com", {})

    def test_disabled_transport_sends_nothing(self) -> None:
        with patch.object(requests.Session, "post") as mock_post:
            Notifier().send(NotificationKind.VERIFICATION, "alice@example.com", {})
        mock_post.assert_not_called()

    def test_send_quietly_swallows_delivery_failure(self, caplog) -> None:
        notifier = Notifier("https://mail.example/send", "key-1")
        with patch.object(requests.Session, "post", return_value=_response(503)):
            assert send_quietly(notifier, NotificationKind.VERIFICATION, "alice@example.com", {}) is False
        assert "not delivered" in caplog.text


class TestGeolocator:
    def test_ipapi_co_shape(self) -> None:
        geo = Geolocator("https://ipapi.co/{ip}/json/")
        payload = {
            "country_name": "Germany",
            "region": "Berlin",
            "city": "Berlin",
            "latitude": 52.52,
            "longitude": 13.4,
        }
        with patch.object(requests.Session, "get", return_value=_response(200, payload)) as mock_get:
            location = geo.lookup("81.2.69.142")

        assert mock_get.call_args[0][0] == "https://ipapi.co/81.2.69.142/json/"
        assert location == GeoLocation(
            country="Germany", region="Berlin", city="Berlin", latitude=52.52, longitude=13.4
        )
        geo.close()

    def test_ip_api_com_shape(self) -> None:
        geo = Geolocator("http://ip-api.com/json/{ip}")
        payload = {"status": "success", "country": "France", "city": "Paris", "lat": "48.85", "lon": 2.35}
        with patch.object(requests.Session, "get", return_value=_response(200, payload)):
            location = geo.lookup("89.160.20.112")
        assert location.city == "Paris"
        assert location.latitude == 48.85

    def test_provider_failure_is_none(self) -> None:
        geo = Geolocator("http://ip-api.com/json/{ip}")
        with patch.object(requests.Session, "get", return_value=_response(200, {"status": "fail"})):
            assert geo.lookup("89.160.20.112") is None
        with patch.object(requests.Session, "get", side_effect=requests.Timeout("slow")):
            assert geo.lookup("89.160.20.112") is None
        with patch.object(requests.Session, "get", return_value=_response(502)):
            assert geo.lookup("89.160.20.112") is None

    @pytest.mark.parametrize("ip", [None, "", "not-an-ip", "10.1.2.3", "127.0.0.1", "192.168.0.9", "::1"])
    def test_non_public_addresses_are_not_looked_up(self, ip) -> None:
        geo = Geolocator("https://ipapi.co/{ip}/json/")
        with patch.object(requests.Session, "get") as mock_get:
            assert geo.lookup(ip) is None
        mock_get.assert_not_called()
        assert not is_public_address(ip)

    def test_disabled_provider(self) -> None:
        assert Geolocator().lookup("81.2.69.142") is None

    def test_label_prefers_most_specific(self) -> None:
        assert GeoLocation(country="DE", city="Berlin").label() == "Berlin"
        assert GeoLocation(country="DE").label() == "DE"
        assert GeoLocation().label() == "Unknown"
