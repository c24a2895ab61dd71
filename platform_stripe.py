'''
Stripe card checkout reconciler

Stripe calls us back with checkout session events. Sessions for the proxy product are recorded as
payees keyed by the session's `client_reference_id` which the checkout page sets to an HMAC of the
client's blinded token message (see `payment_status_for`). Sessions that can't be attributed to a
client or product are recorded as lapses for an operator to look at. Only settled sessions become
payees, expired and failed checkouts are set aside as lapses.

The webhook always answers 200 with `{"received": bool}` once the signature checks out, `received`
is false when persisting failed or Stripe itself could not be reached so that Stripe retries the
delivery.
'''
import enum
import json
import typing
import logging
import sqlite3

import stripe

import base
import env
import backend
import cipher
from base import JSONObject

log = logging.Logger('STRIPE')

# NOTE: dashboard.stripe.com/products/prod_O7jipSFxm4qUGy
PROXY_PRODUCT_ID:         str             = 'prod_O7jipSFxm4qUGy'
PAYMENT_VALID_MS:         int             = base.MILLISECONDS_IN_DAY * 30
SETTLED_PAYMENT_STATUSES: tuple[str, ...] = ('paid', 'no_payment_required')

class ProcessingStatus(enum.StrEnum):
    Skip      = 'skip'       # Nothing to do
    Retry     = 'retry'      # Stripe should deliver the event again
    Success   = 'success'
    Unhandled = 'unhandled'  # Not a product or event we handle

class PaymentStatus(enum.StrEnum):
    Paid   = 'paid'
    Unpaid = 'unpaid'
    None_  = 'none'

class LapseReason(enum.StrEnum):
    MissingRef   = 'missing-ref'
    MissingItems = 'missing-items'
    MissingPrice = 'missing-price'
    Unsettled    = 'unsettled'  # Expired, or the delayed payment failed

def _stripe_object_to_json(obj: typing.Any) -> JSONObject:
    # NOTE: StripeObject serialises itself to JSON with str()
    result = typing.cast(JSONObject, json.loads(str(obj)))
    return result

def retrieve_session_with_line_items(gateway_env: env.Env, sid: str) -> JSONObject:
    session = stripe.checkout.Session.retrieve(sid, expand=['line_items'], api_key=gateway_env.stripe_api_key)
    result  = _stripe_object_to_json(session)
    return result

def _lapse(sql_conn: sqlite3.Connection | None, sid: str, session: JSONObject, reason: LapseReason) -> ProcessingStatus:
    noted = backend.insert_lapse(sql_conn, sid, json.dumps(session), str(reason), base.now_unix_ts_ms())
    log.warning(f'Checkout {sid}: {reason}; noted? {noted.success}')
    return ProcessingStatus.Skip

def _first_product_id(session: JSONObject) -> tuple[str | None, LapseReason | None]:
    line_items = session.get('line_items')
    data       = line_items.get('data') if isinstance(line_items, dict) else None
    if not isinstance(data, list) or len(data) == 0 or not isinstance(data[0], dict):
        return None, LapseReason.MissingItems

    price = data[0].get('price')
    if not isinstance(price, dict):
        return None, LapseReason.MissingPrice

    product = price.get('product')
    # NOTE: The product is an id unless the caller expanded it
    if isinstance(product, dict):
        product = product.get('id')
    result = product if isinstance(product, str) else ''
    return result, None

def fulfill_order(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, session: JSONObject) -> ProcessingStatus:
    sid       = str(session.get('id') or '')
    ref       = str(session.get('client_reference_id') or '')
    sess_stat = str(session.get('status') or '')          # complete, expired, open
    pay_stat  = str(session.get('payment_status') or '')  # paid, unpaid, no_payment_required

    # NOTE: A delayed payment method completes the session unpaid, async_payment_succeeded follows
    # once the funds settle
    if pay_stat not in SETTLED_PAYMENT_STATUSES:
        log.info(f'Checkout {sid}: not settled ({sess_stat}/{pay_stat}), skipping')
        return ProcessingStatus.Skip

    expanded = retrieve_session_with_line_items(gateway_env, sid)
    session  = dict(session)
    session['line_items'] = expanded.get('line_items')

    product_id, lapse = _first_product_id(session)
    if lapse is not None:
        return _lapse(sql_conn, sid, session, lapse)

    if product_id != PROXY_PRODUCT_ID:
        log.warning(f'Checkout {sid}: unhandled product {product_id}')
        return ProcessingStatus.Unhandled

    assert product_id is not None
    tx      = json.dumps(session)
    now     = base.now_unix_ts_ms()
    ordered = backend.upsert_stripeorder(sql_conn, sid, product_id, tx, now)
    if not ordered.success:
        log.error(f'Checkout {sid}: saving order for {product_id} failed')
        return ProcessingStatus.Retry

    saved = backend.insert_payee(sql_conn, sid, ref, sess_stat, pay_stat, product_id, tx, now)
    if not saved.success:
        log.error(f'Checkout {sid}: saving payee {ref} ({sess_stat}/{pay_stat}) failed')
        return ProcessingStatus.Retry

    log.info(f'Checkout {sid}: saved payee {ref} ({sess_stat}/{pay_stat}) for {product_id}')
    return ProcessingStatus.Success

def create_or_fulfill_order(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, session: JSONObject) -> ProcessingStatus:
    sid = str(session.get('id') or '')
    if not session.get('client_reference_id'):
        return _lapse(sql_conn, sid, session, LapseReason.MissingRef)
    result = fulfill_order(sql_conn, gateway_env, session)
    return result

def handle_event(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, event: JSONObject) -> ProcessingStatus:
    result     = ProcessingStatus.Unhandled
    event_type = event.get('type')
    data       = event.get('data')
    session    = data.get('object') if isinstance(data, dict) else None
    if not isinstance(session, dict):
        log.warning(f'Event {event_type} has no data object')
        return result

    match event_type:
        case 'checkout.session.completed' | 'checkout.session.async_payment_succeeded':
            result = create_or_fulfill_order(sql_conn, gateway_env, session)

        case 'checkout.session.async_payment_failed' | 'checkout.session.expired':
            result = _lapse(sql_conn, str(session.get('id') or ''), session, LapseReason.Unsettled)

        case _:
            log.warning(f'Unhandled event {event_type}')
    return result

def handle_checkout_webhook(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, raw_body: bytes, signature: str) -> base.JSONResponse:
    if len(gateway_env.stripe_webhook_secret) == 0 or len(gateway_env.stripe_api_key) == 0:
        raise base.ConfigError('Stripe API key or webhook secret is not configured')

    try:
        payload = raw_body.decode('utf-8')
        _       = stripe.WebhookSignature.verify_header(payload, signature, gateway_env.stripe_webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE)
        event   = json.loads(payload)
    except stripe.SignatureVerificationError as e:
        log.warning(f'Webhook signature rejected: {e}')
        return base.JSONResponse(400, {'error': 'invalid signature'})
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        log.warning(f'Webhook body is not JSON: {e}')
        return base.JSONResponse(400, {'error': 'invalid payload'})

    if not isinstance(event, dict):
        return base.JSONResponse(400, {'error': 'invalid payload'})

    status = ProcessingStatus.Unhandled
    try:
        status = handle_event(sql_conn, gateway_env, typing.cast(JSONObject, event))
    except stripe.StripeError as e:
        log.error(f'Handling {event.get("type")} {event.get("id")} failed: {e}')
        status = ProcessingStatus.Retry

    result = base.JSONResponse(200, {'received': status != ProcessingStatus.Retry})
    return result

def payment_status_for(sql_conn: sqlite3.Connection | None, blind_msg: bytes, hmac_key: bytes) -> PaymentStatus:
    '''
    Whether the holder of `blind_msg` paid for the proxy product in the last 30 days. The checkout
    page sets `client_reference_id` to the hex HMAC-SHA256 of the message under `hmac_key`.
    '''
    ref   = cipher.hmac_sign(hmac_key, blind_msg).hex()
    payee = backend.get_latest_payee_by_ref(sql_conn, ref)
    if payee is None:
        log.info(f'No payee for {ref}')
        return PaymentStatus.None_

    settled = payee.pay_stat in SETTLED_PAYMENT_STATUSES
    recent  = payee.unix_ts_ms + PAYMENT_VALID_MS > base.now_unix_ts_ms()
    result  = PaymentStatus.Paid if settled and recent else PaymentStatus.Unpaid
    return result
