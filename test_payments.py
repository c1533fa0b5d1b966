import re

import pytest
import requests

import payments
from db import db_connection, fetch_one
from errors import NotFoundError, PaymentGatewayError, UnauthorizedError, ValidationError


class FakeResponse:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code
        self.text = str(body)

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, verify_status='success', fail_with=None):
        self.calls = []
        self.verify_status = verify_status
        self.fail_with = fail_with

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(('POST', url, json, headers))
        if self.fail_with:
            raise self.fail_with
        return FakeResponse({
            'status': True,
            'message': 'Authorization URL created',
            'data': {'authorization_url': 'https://checkout.example/abc', 'access_code': 'abc',
                     'reference': json['reference']},
        })

    def get(self, url, headers=None, timeout=None):
        self.calls.append(('GET', url, None, headers))
        return FakeResponse({'status': True, 'data': {'status': self.verify_status}})


def client_with(session):
    return payments.PaystackClient('sk_test_123', 'https://api.paystack.test/', session=session)


def payment_status(reference):
    with db_connection() as conn:
        return fetch_one(conn.cursor(), 'SELECT status FROM payments WHERE reference = ?', (reference,))


def test_generate_payment_reference_format():
    reference = payments.generate_payment_reference()
    assert re.fullmatch(r'PAY_\d{13}_[A-Z0-9]{6}', reference)


def test_initialize_sends_kobo_and_records_pending(world):
    session = FakeSession()
    result = payments.initialize_payment(world.admin, client_with(session), 2500, 'NGN')
    assert result['authorization_url'] == 'https://checkout.example/abc'

    method, url, body, headers = session.calls[0]
    assert method == 'POST'
    assert url == 'https://api.paystack.test/transaction/initialize'
    assert body['amount'] == 250000
    assert body['email'] == 'gh@example.com'
    assert body['reference'] == result['reference']
    assert headers['Authorization'] == 'Bearer sk_test_123'
    assert payment_status(result['reference'])['status'] == 'PENDING'


def test_initialize_rolls_back_when_gateway_fails(world):
    session = FakeSession(fail_with=requests.ConnectionError('down'))
    with pytest.raises(PaymentGatewayError):
        payments.initialize_payment(world.admin, client_with(session), 2500)
    with db_connection() as conn:
        assert fetch_one(conn.cursor(), 'SELECT COUNT(*) AS n FROM payments', ())['n'] == 0


def test_initialize_checks_role_and_amount(world):
    with pytest.raises(UnauthorizedError):
        payments.initialize_payment(world.teacher, client_with(FakeSession()), 2500)
    with pytest.raises(ValidationError, match='Minimum amount is 100'):
        payments.initialize_payment(world.admin, client_with(FakeSession()), 99)


def test_verify_marks_success_and_is_idempotent(world):
    session = FakeSession(verify_status='success')
    reference = payments.initialize_payment(world.admin, client_with(session), 1000)['reference']

    verified = payments.verify_payment(client_with(session), reference)
    assert verified['success'] is True
    assert verified['payment']['status'] == 'SUCCESS'
    assert session.calls[-1][1].endswith(f'/transaction/verify/{reference}')

    calls = len(session.calls)
    again = payments.verify_payment(client_with(FakeSession(verify_status='failed')), reference)
    assert again['payment']['status'] == 'SUCCESS'
    assert len(session.calls) == calls


def test_verify_marks_failure(world):
    session = FakeSession(verify_status='abandoned')
    reference = payments.initialize_payment(world.admin, client_with(session), 1000)['reference']
    verified = payments.verify_payment(client_with(session), reference)
    assert verified['success'] is False
    assert payment_status(reference)['status'] == 'FAILED'


def test_verify_unknown_or_missing_reference(world):
    with pytest.raises(ValidationError, match='Payment reference is required'):
        payments.verify_payment(client_with(FakeSession()), '')
    with pytest.raises(NotFoundError):
        payments.verify_payment(client_with(FakeSession()), 'PAY_0_NOPE00')


def test_gateway_error_body_raises():
    class Refusing(FakeSession):
        def get(self, url, headers=None, timeout=None):
            return FakeResponse({'status': False, 'message': 'Invalid key'}, status_code=401)

    with pytest.raises(PaymentGatewayError) as excinfo:
        client_with(Refusing()).verify('PAY_1_ABCDEF')
    assert excinfo.value.detail == 'Invalid key'
