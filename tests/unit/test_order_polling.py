"""
Unit tests for the confirmation page polling loop.
"""
from unittest import mock

import pytest
import requests

from dropshop.services.order_polling import (
    ApiOrderFetcher, OrderPollingTimeout, PollState, backoff_delays, wait_for_order, TIMEOUT_MESSAGE,
)


def test_backoff_is_exponential_and_capped():
    assert list(backoff_delays(6, 0.5, 4.0)) == [0.5, 1.0, 2.0, 4.0, 4.0]


def test_order_found_after_retries():
    answers = iter([None, None, {'orderId': 1}])
    sleeps = []

    result = wait_for_order(lambda pi: next(answers), 'pi_1', sleep=sleeps.append)

    assert result.state == PollState.FOUND
    assert result.attempts == 3
    assert result.order == {'orderId': 1}
    assert sleeps == [0.5, 1.0]


def test_times_out_after_max_attempts():
    sleeps = []

    with pytest.raises(OrderPollingTimeout) as exc_info:
        wait_for_order(lambda pi: None, 'pi_1', max_attempts=4, sleep=sleeps.append)

    assert exc_info.value.attempts == 4
    assert str(exc_info.value) == TIMEOUT_MESSAGE
    assert len(sleeps) == 3


def test_transient_errors_count_as_attempts():
    calls = []

    def flaky(payment_intent_id):
        calls.append(payment_intent_id)
        if len(calls) == 1:
            raise requests.ConnectionError('reset')
        return {'orderId': 9}

    result = wait_for_order(flaky, 'pi_2', sleep=lambda _: None)

    assert result.attempts == 2


def test_invalid_attempt_count():
    with pytest.raises(ValueError):
        wait_for_order(lambda pi: None, 'pi_1', max_attempts=0)


class TestApiOrderFetcher:

    def _response(self, status_code, payload=None):
        response = mock.Mock(status_code=status_code)
        response.json.return_value = payload
        return response

    def test_missing_order_is_none(self):
        http = mock.Mock()
        http.get.return_value = self._response(404)

        assert ApiOrderFetcher('http://shop.test/', session=http)('pi_1') is None
        http.get.assert_called_once_with('http://shop.test/api/orders/by-payment-intent/pi_1', timeout=5.0)

    def test_existing_order(self):
        http = mock.Mock()
        http.get.return_value = self._response(200, {'orderId': 3, 'publicCode': '#IH01-003'})

        assert ApiOrderFetcher('http://shop.test', session=http)('pi_1')['orderId'] == 3
