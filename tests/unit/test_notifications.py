import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from cryptopaylink.exceptions import ConfigurationError, NotificationError
from cryptopaylink.notifications import (
    SIGNATURE_HEADER,
    LoggingNotificationDispatcher,
    WebhookNotificationDispatcher,
    build_receipt,
)

WEBHOOK_URL = "https://merchant.example.com/hooks/payments"


@pytest.fixture
def confirmed(product, make_payment):
    return make_payment(
        product,
        status="confirmed",
        tx_hash="sig-1",
        confirmed_at=datetime(2024, 5, 1, 12, tzinfo=timezone.utc),
    )


def ok_response():
    response = MagicMock()
    response.raise_for_status.return_value = None
    return response


def test_build_receipt(confirmed, product):
    receipt = build_receipt(confirmed, product)
    assert receipt["paymentId"] == confirmed.id
    assert receipt["productName"] == "Python eBook"
    assert receipt["priceUsd"] == "10"
    assert receipt["amount"] == "0.5"
    assert receipt["currency"] == "SOL"
    assert receipt["txHash"] == "sig-1"
    assert receipt["confirmedAt"] == "2024-05-01T12:00:00+00:00"


def test_build_receipt_without_product(confirmed):
    receipt = build_receipt(confirmed, None)
    assert receipt["productName"] is None
    assert receipt["amount"] == "0.5"


def test_logging_dispatcher_records_receipts(confirmed, product, caplog):
    dispatcher = LoggingNotificationDispatcher()
    with caplog.at_level("INFO", logger="cryptopaylink.notifications"):
        dispatcher.send_confirmation(confirmed, product)
    assert dispatcher.sent == [build_receipt(confirmed, product)]
    assert "sig-1" in caplog.text


class TestWebhook:
    def test_posts_signed_receipt(self, confirmed, product):
        session = MagicMock()
        session.post.return_value = ok_response()
        dispatcher = WebhookNotificationDispatcher(WEBHOOK_URL, secret="whsec", session=session, retry_delay=0)

        dispatcher.send_confirmation(confirmed, product)

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args == (WEBHOOK_URL,)
        body = kwargs["data"]
        assert json.loads(body)["txHash"] == "sig-1"
        expected = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        assert kwargs["headers"][SIGNATURE_HEADER] == expected
        assert kwargs["timeout"] == 10.0

    def test_unsigned_without_secret(self, confirmed, product):
        session = MagicMock()
        session.post.return_value = ok_response()
        WebhookNotificationDispatcher(WEBHOOK_URL, session=session).send_confirmation(confirmed, product)
        assert SIGNATURE_HEADER not in session.post.call_args.kwargs["headers"]

    def test_retries_then_succeeds(self, confirmed, product):
        session = MagicMock()
        session.post.side_effect = [requests.exceptions.ConnectionError("reset"), ok_response()]
        dispatcher = WebhookNotificationDispatcher(WEBHOOK_URL, session=session, max_attempts=3, retry_delay=0)

        dispatcher.send_confirmation(confirmed, product)
        assert session.post.call_count == 2

    def test_raises_notification_error_after_retries(self, confirmed, product):
        failing = MagicMock()
        failing.raise_for_status.side_effect = requests.exceptions.HTTPError("500 Server Error")
        session = MagicMock()
        session.post.return_value = failing
        dispatcher = WebhookNotificationDispatcher(WEBHOOK_URL, session=session, max_attempts=2, retry_delay=0)

        with pytest.raises(NotificationError) as exc_info:
            dispatcher.send_confirmation(confirmed, product)
        assert exc_info.value.channel == "webhook"
        assert exc_info.value.payment_id == confirmed.id
        assert session.post.call_count == 2

    @pytest.mark.parametrize("url", ["", "ftp://merchant.example.com", "merchant.example.com/hook"])
    def test_rejects_non_http_urls(self, url):
        with pytest.raises(ConfigurationError):
            WebhookNotificationDispatcher(url)
