"""
School subscription payments through Paystack.

Amounts are stored in naira; Paystack takes the smallest unit (kobo), so the
client multiplies by 100 on the way out.
"""

import logging
import random
import string
import time

import requests

from access_policy import require
from db import db_connection, db_execute, fetch_one, format_timestamp, new_id, utcnow
from errors import NotFoundError, PaymentGatewayError, ValidationError
from workflows import PAYMENT_WORKFLOW, PaymentStatus

DEFAULT_BASE_URL = 'https://api.paystack.co'
MIN_AMOUNT = 100


def generate_payment_reference():
    """PAY_<epoch ms>_<6 upper-case alphanumerics>."""
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f'PAY_{int(time.time() * 1000)}_{suffix}'


class PaystackClient:
    def __init__(self, secret_key, base_url=DEFAULT_BASE_URL, session=None, timeout=10):
        self.secret_key = secret_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def headers(self):
        return {
            'Authorization': f'Bearer {self.secret_key}',
            'Content-Type': 'application/json',
        }

    def _payload(self, response, action):
        try:
            body = response.json()
        except ValueError:
            raise PaymentGatewayError(f'Failed to {action} payment', detail=response.text[:500])
        if response.status_code >= 400 or not body.get('status'):
            raise PaymentGatewayError(f'Failed to {action} payment', detail=body.get('message', ''))
        return body

    def initialize(self, email, amount, currency, reference, metadata=None):
        try:
            response = self.session.post(
                f'{self.base_url}/transaction/initialize',
                json={
                    'email': email,
                    'amount': int(round(amount * 100)),
                    'currency': currency,
                    'reference': reference,
                    'metadata': metadata or {},
                },
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise PaymentGatewayError('Failed to initialize payment', detail=str(exc))
        return self._payload(response, 'initialize')

    def verify(self, reference):
        try:
            response = self.session.get(
                f'{self.base_url}/transaction/verify/{reference}',
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise PaymentGatewayError('Failed to verify payment', detail=str(exc))
        return self._payload(response, 'verify')


def _payment_json(row):
    return {
        'id': row['id'],
        'amount': row['amount'],
        'currency': row['currency'],
        'status': row['status'],
        'reference': row['reference'],
        'created_at': format_timestamp(row['created_at']),
        'updated_at': format_timestamp(row['updated_at']),
    }


def initialize_payment(actor, client, amount, currency='NGN'):
    """Record a PENDING payment and open a Paystack transaction for it; both or neither."""
    require(actor, 'payment.initialize', {'school_id': actor.get('school_id')})
    if amount is None or amount < MIN_AMOUNT:
        raise ValidationError(f'Minimum amount is {MIN_AMOUNT}')
    school_id = actor.get('school_id')
    if not school_id:
        raise NotFoundError('School not found')

    reference = generate_payment_reference()
    payment_id = new_id()
    now = utcnow().isoformat()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        school = fetch_one(c, 'SELECT id, name, email FROM schools WHERE id = ?', (school_id,))
        if not school:
            raise NotFoundError('School not found')
        db_execute(
            c,
            '''INSERT INTO payments (id, school_id, amount, currency, status, reference, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
            (payment_id, school_id, amount, currency, PaymentStatus.PENDING.value, reference, now, now),
        )
        gateway = client.initialize(
            school['email'], amount, currency, reference,
            metadata={'school_id': school_id, 'school_name': school['name'], 'payment_id': payment_id},
        )
    logging.info("Payment %s initialized for school %s: %s %s", reference, school_id, amount, currency)
    return {
        'payment_id': payment_id,
        'reference': reference,
        'authorization_url': gateway['data']['authorization_url'],
    }


def verify_payment(client, reference):
    """Settle a PENDING payment from the gateway's verdict; final payments come back unchanged."""
    if not (reference or '').strip():
        raise ValidationError('Payment reference is required')
    with db_connection() as conn:
        payment = fetch_one(conn.cursor(), 'SELECT * FROM payments WHERE reference = ?', (reference,))
    if not payment:
        raise NotFoundError('Payment not found')
    if payment['status'] != PaymentStatus.PENDING.value:
        return {'success': payment['status'] == PaymentStatus.SUCCESS.value, 'payment': _payment_json(payment)}

    gateway = client.verify(reference)
    succeeded = (gateway.get('data') or {}).get('status') == 'success'
    target = PAYMENT_WORKFLOW.next_state(payment['status'], 'succeed' if succeeded else 'fail')

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE payments SET status = ?, updated_at = ? WHERE reference = ? AND status = ?',
            (target.value, utcnow().isoformat(), reference, PaymentStatus.PENDING.value),
        )
        payment = fetch_one(c, 'SELECT * FROM payments WHERE reference = ?', (reference,))
    logging.info("Payment %s verified: %s", reference, payment['status'])
    return {'success': payment['status'] == PaymentStatus.SUCCESS.value, 'payment': _payment_json(payment)}
