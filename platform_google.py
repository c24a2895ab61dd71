'''
Google Play reconciler

Turns Google Play real-time developer notifications (RTDN) and end-client requests into
entitlement decisions. Every flow has the same shape:

  identify client -> classify purchase state -> persist the play order -> decide -> acknowledge

Notifications arrive either pushed over HTTP by Pub/Sub (see server.py) or pulled by the thread
started from `init`. Google may redeliver, reorder and duplicate them so nothing here trusts the
notification itself beyond the purchase token, the purchase is always re-read from the Play
Developer API. Errors raised while reconciling a notification propagate so that Google redelivers
it, end-client endpoints instead answer with a `base.JSONResponse`.
'''
import re
import json
import time
import base64
import typing
import logging
import sqlite3
import binascii
import threading
import dataclasses

from   google.cloud import pubsub_v1
import google.cloud.pubsub_v1.subscriber.message

import base
import env
import backend
import cipher
import session_broker
import platform_google_api
from base import JSONObject, safe_dump_dict_keys_or_data
from platform_google_api import GoogleAPIError
from platform_google_types import SubscriptionNotificationType, OneTimeProductNotificationType, ProductType, RefundType, \
    SubscriptionsV2State, ProductPurchaseState, SubscriptionV2Data, SubscriptionV2DataLineItem, ProductPurchaseV2Data, \
    EntitlementIntent, KNOWN_PRODUCTS, KNOWN_BASE_PLANS, MONTHLY_TEST_PRODUCT_ID, ANNUAL_TEST_PRODUCT_ID, \
    MONTHLY_BASE_PLAN_ID, YEARLY_BASE_PLAN_ID, ONETIME_PRODUCT_ID
from session_broker import EntitlementStatus

log = logging.Logger('GOOGLE')

MIN_CID_LENGTH:     int             = 32
CID_BYTES:          int             = 32    # Generated cids are 64 hex characters
MAX_LINKED_HOPS:    int             = 4
REVOKE_BACKOFF_S:   tuple[int, ...] = (1, 10)
CID_PATTERN                         = re.compile(r'^[a-fA-F0-9]+$')
ENDPOINT_ERRORS                     = (GoogleAPIError, session_broker.BrokerError, base.ConfigError, ValueError)

class ReconcileError(Exception):
    '''The purchase and the entitlement disagree in a way that needs an operator to look at it'''

class CidError(Exception):
    pass

@dataclasses.dataclass
class ThreadContext:
    thread:      threading.Thread | None = None
    kill_thread: bool                    = False
    sleep_event: threading.Event         = dataclasses.field(default_factory=threading.Event)

@dataclasses.dataclass
class GoogleHandleNotificationResult:
    purchase_token: str  = ""
    ack:            bool = False

@dataclasses.dataclass
class TimestampedData:
    event_unix_ts_ms:   int        = 0
    received_unix_ts_s: float      = 0
    body:               typing.Any = None

def init(gateway_env:          env.Env,
         project_name:         str,
         subscription_name:    str,
         app_credentials_path: str) -> ThreadContext:
    # NOTE: Setup credentials global variable
    assert platform_google_api.credentials       is None and \
           platform_google_api.publisher_service is None, \
            "Initialise was called twice. Google uses callbacks with no way to pass in a per-callback context so it needs global variables"

    platform_google_api.init(app_credentials_path, gateway_env.google_package_name)

    # NOTE: Setup thread for caller to use
    result        = ThreadContext()
    result.thread = threading.Thread(target=thread_entry_point, args=(result, gateway_env, app_credentials_path, project_name, subscription_name))
    return result

def thread_entry_point(context: ThreadContext, gateway_env: env.Env, app_credentials_path: str, project_name: str, subscription_name: str):
    while context.kill_thread == False:
        with pubsub_v1.SubscriberClient.from_service_account_file(app_credentials_path) as client:
            sub_path = client.subscription_path(project=project_name, subscription=subscription_name)

            # NOTE: Google does not set ordering keys on payment notifications, messages for the
            # same purchase can arrive out of order within a batch and across replays. Handling is
            # idempotent (the purchase is always re-read from Google) so ordering only matters for
            # log readability, but holding messages for a short while and sorting them by event
            # time keeps the play order rows from flip-flopping.
            #
            # Example payload:
            #
            #   received_messages {
            #     ack_id: "HxknBUxeR..."
            #     message {
            #       data: "{\"version\":\"1.0\",\"packageName\":\"com.celzero.bravedns\",\"eventTimeMillis\":\"1762752016420\",...}"
            #       message_id: "17064522705211191"
            #     }
            #   }

            # NOTE: How long after receiving an event do we want before executing it. The time
            # inbetween is reserved to allow the Google pub/sub client to pull more messages which
            # can potentially come out of order.
            TIME_BEFORE_HANDLING_EVENT_S = 8

            # NOTE: How often to poll Google for events in seconds
            POLL_FREQUENCY_S = 2

            ordered_msg_list: list[TimestampedData] = []
            while context.kill_thread == False:
                result = client.pull(subscription=sub_path,
                                     return_immediately=True,
                                     max_messages=64)

                now: float = time.time()
                if len(result.received_messages) > 0:
                    # NOTE: Generate the list of messages sorted by their event time stamp
                    err = base.ErrorSink()
                    for it in result.received_messages:
                        event_time_ms = 0
                        try:
                            body: typing.Any = json.loads(it.message.data)
                            if isinstance(body, dict):
                                event_time_ms = base.json_dict_require_str_coerce_to_int(body, 'eventTimeMillis', err)
                        except json.JSONDecodeError:
                            log.error(f'Pulled message {it.message.message_id} is not JSON')
                        ordered_msg_list.append(TimestampedData(received_unix_ts_s=now, event_unix_ts_ms=event_time_ms, body=it.message))

                    if err.has():
                        log.warning(f'Pulled messages had malformed event times: {err.build()}')

                    # NOTE: Sort the events we've added
                    ordered_msg_list.sort(key=lambda it: it.event_unix_ts_ms)

                # NOTE: Process events
                index = 0
                while index < len(ordered_msg_list):
                    msg                   = ordered_msg_list[index]
                    time_since_received_s = now - msg.received_unix_ts_s
                    if time_since_received_s < TIME_BEFORE_HANDLING_EVENT_S:
                        break

                    if not handle_sub_message(msg.body, gateway_env):
                        log.warning(f'Discarding event because handling of it failed (message will be re-notified by google) {msg.event_unix_ts_ms}')
                    index += 1

                # NOTE: Erase the processed events
                ordered_msg_list = ordered_msg_list[index:]
                _ = context.sleep_event.wait(POLL_FREQUENCY_S)

def handle_sub_message(message: google.cloud.pubsub_v1.subscriber.message.Message, gateway_env: env.Env) -> bool:
    result = False
    try:
        body: typing.Any = json.loads(message.data)
    except json.JSONDecodeError:
        log.error(f'Payload was not JSON: {message.message_id}')
        return result

    if not isinstance(body, dict):
        log.error(f'Payload was not a JSON object: {safe_dump_dict_keys_or_data(body)}')
        return result

    err          = base.ErrorSink()
    notif_result = GoogleHandleNotificationResult()
    try:
        with backend.OpenDBAtPath(db_path=base.DB_PATH, uri=base.DB_PATH_IS_URI) as db:
            notif_result = handle_notification(typing.cast(JSONObject, body), db.sql_conn, gateway_env, err)
    except Exception as e:
        # NOTE: The pull thread must survive anything a single notification throws, the message is
        # left un-acked so Google redelivers it
        err.msg_list.append(f'Handling notification failed: {type(e).__name__}: {e}')

    if err.has():
        log.error(f'{err.build()}\nPayload was: {safe_dump_dict_keys_or_data(body)}')
    elif notif_result.ack:
        message.ack()
        result = True
    return result

def decode_push_envelope(envelope: typing.Any, err: base.ErrorSink) -> JSONObject | None:
    '''
    Unwrap a Pub/Sub push request, `{"message": {"data": base64(notification JSON), ...},
    "subscription": "..."}`, into the developer notification it carries
    '''
    result = None
    if not isinstance(envelope, dict):
        err.msg_list.append('Push envelope is not a JSON object')
        return result

    message = base.json_dict_require_obj(envelope, 'message', err)
    data    = base.json_dict_require_str(message, 'data', err) if not err.has() else ''
    if err.has():
        return result

    try:
        body = json.loads(base64.b64decode(data, validate=True))
    except (binascii.Error, ValueError) as e:
        err.msg_list.append(f'Push envelope data is not base64 encoded JSON: {e}')
        return result

    if isinstance(body, dict):
        result = typing.cast(JSONObject, body)
    else:
        err.msg_list.append(f'Push envelope data is not a JSON object: {safe_dump_dict_keys_or_data(body)}')
    return result

def handle_notification(body: JSONObject, sql_conn: sqlite3.Connection, gateway_env: env.Env, err: base.ErrorSink) -> GoogleHandleNotificationResult:
    result            = GoogleHandleNotificationResult()
    body_version      = base.json_dict_require_str(body, "version", err)
    package_name      = base.json_dict_require_str(body, "packageName", err)
    event_time_millis = base.json_dict_require_str_coerce_to_int(body, "eventTimeMillis", err)

    if package_name != gateway_env.google_package_name:
        err.msg_list.append(f'{package_name} does not match google package name ({gateway_env.google_package_name})')

    subscription     = base.json_dict_optional_obj(body, "subscriptionNotification", err)
    one_time_product = base.json_dict_optional_obj(body, "oneTimeProductNotification", err)
    voided_purchase  = base.json_dict_optional_obj(body, "voidedPurchaseNotification", err)
    test_obj         = base.json_dict_optional_obj(body, "testNotification", err)

    unique_notif_keys = (subscription is not None) + (one_time_product is not None) + (voided_purchase is not None) + (test_obj is not None)
    if unique_notif_keys == 0:
        err.msg_list.append(f'No notification for {package_name} {safe_dump_dict_keys_or_data(body)}')
    elif unique_notif_keys > 1:
        err.msg_list.append(f'Multiple notifications for {package_name} {safe_dump_dict_keys_or_data(body)}')

    if err.has():
        return result

    if subscription is not None:
        result.purchase_token = base.json_dict_require_str(subscription, "purchaseToken", err)
        notification_type     = base.json_dict_require_int(subscription, "notificationType", err)
        if err.has():
            return result
        handle_subscription_notification(sql_conn, gateway_env, result.purchase_token, notification_type)

    elif one_time_product is not None:
        result.purchase_token = base.json_dict_require_str(one_time_product, "purchaseToken", err)
        notification_type     = base.json_dict_require_int(one_time_product, "notificationType", err)
        sku                   = base.json_dict_optional_str(one_time_product, "sku", err) or ''
        if err.has():
            return result
        handle_onetime_notification(sql_conn, gateway_env, result.purchase_token, notification_type, sku)

    elif voided_purchase is not None:
        result.purchase_token = base.json_dict_require_str(voided_purchase, "purchaseToken", err)
        order_id              = base.json_dict_optional_str(voided_purchase, "orderId", err) or ''
        product_type          = base.json_dict_optional_int(voided_purchase, "productType", 0, err)
        refund_type           = base.json_dict_optional_int(voided_purchase, "refundType", 0, err)
        if err.has():
            return result
        handle_voided_notification(result.purchase_token, order_id, product_type, refund_type)

    elif test_obj is not None:
        log.info(f'Test notification, version {test_obj.get("version")}')

    log.info(f'Processed notification {body_version} for {package_name} at {event_time_millis}')
    result.ack = True
    return result

def _notification_type_label(enum_type: type[SubscriptionNotificationType] | type[OneTimeProductNotificationType] | type[ProductType] | type[RefundType], value: int) -> str:
    member = enum_type._value2member_map_.get(value)
    result = member.name if member is not None else f'UNKNOWN_{value}'
    return result

def fetch_subscription(purchase_token: str) -> SubscriptionV2Data:
    err    = base.ErrorSink()
    result = platform_google_api.get_subscription_v2(purchase_token, err)
    if result is None:
        raise GoogleAPIError(f'Parsing subscription for {base.obfuscate(purchase_token)} failed: {err.build()}')
    return result

def fetch_product(purchase_token: str) -> ProductPurchaseV2Data:
    err    = base.ErrorSink()
    result = platform_google_api.get_product_v2(purchase_token, err)
    if result is None:
        raise GoogleAPIError(f'Parsing product purchase for {base.obfuscate(purchase_token)} failed: {err.build()}')
    return result

def _line_item_intent(item: SubscriptionV2DataLineItem, start_unix_ts_ms: int | None) -> EntitlementIntent | None:
    if item.product_id not in KNOWN_PRODUCTS:
        return None

    until = item.expiry_time.unix_milliseconds if item.expiry_time is not None else None
    if item.product_id == MONTHLY_TEST_PRODUCT_ID:
        return EntitlementIntent(item.product_id, MONTHLY_BASE_PLAN_ID, start_unix_ts_ms, until)
    if item.product_id == ANNUAL_TEST_PRODUCT_ID:
        return EntitlementIntent(item.product_id, YEARLY_BASE_PLAN_ID, start_unix_ts_ms, until)

    known_plan = KNOWN_BASE_PLANS.get(item.base_plan_id or '')
    if known_plan is None:
        return None
    return known_plan.until(start_unix_ts_ms, until)

def subscription_info(sub: SubscriptionV2Data) -> EntitlementIntent | None:
    '''
    The entitlement granted by the first line item that has started, a subscription has more than
    one line item while an upgrade or downgrade is deferred to its next renewal. Deferred items
    have no expiry and are skipped.
    '''
    if len(sub.line_items) == 0:
        raise ValueError('Subscription has no line items')

    start = sub.start_time.unix_milliseconds if sub.start_time is not None else None
    for item in sub.line_items:
        if item.expiry_time is None:
            continue
        result = _line_item_intent(item, start)
        if result is not None:
            return result
    return None

def onetime_plan(purchase: ProductPurchaseV2Data) -> EntitlementIntent | None:
    '''A one-time purchase is entitled for the duration of its plan from the time it was paid for'''
    for item in purchase.line_items:
        if item.product_id not in KNOWN_PRODUCTS:
            log.error(f'Onetime: unknown product id {item.product_id}; test? {purchase.test_purchase}')
            continue

        if len(item.purchase_option_id) == 0 or purchase.purchase_completion_time is None:
            log.error(f'Onetime: missing purchase option or completion time for {item.product_id}; test? {purchase.test_purchase}')
            continue

        known_plan = KNOWN_BASE_PLANS.get(item.purchase_option_id)
        if known_plan is None:
            log.error(f'Onetime: unknown purchase option {item.purchase_option_id} for {item.product_id}; test? {purchase.test_purchase}')
            continue

        return known_plan.since(purchase.purchase_completion_time.unix_milliseconds)

    log.error(f'Onetime: no valid line items in order {purchase.order_id}; test? {purchase.test_purchase}')
    return None

def _persist_cid(sql_conn: sqlite3.Connection | None, cid: str, kind: base.ClientKind):
    inserted = backend.insert_client_if_absent(sql_conn, cid, None, kind, base.now_unix_ts_ms())
    if not inserted.success:
        raise CidError(f'Failed to get or insert client {cid}')

def resolve_cid(ctx: env.ExecCtx, sql_conn: sqlite3.Connection | None, sub: SubscriptionV2Data, gen: bool, persist: bool) -> str:
    '''
    The client id the app attached to the purchase at checkout. Upgrades and re-signups may only
    carry the id on the purchase they replaced so the linked purchase chain is followed for a
    bounded number of hops. If no id is found a fresh one is generated when `gen` is set,
    otherwise CidError is raised.
    '''
    result  = ''
    reason  = ''
    current = sub
    visited: set[str] = set()
    for hop in range(1, MAX_LINKED_HOPS + 1):
        cid = current.obfuscated_external_account_id
        if len(cid) >= MIN_CID_LENGTH:
            result = cid
            break

        linked = current.linked_purchase_token
        if len(cid) > 0 or not linked or hop == MAX_LINKED_HOPS:
            reason = f'cid ({len(cid)} chars) missing or invalid after {hop} hop(s)'
            break

        if linked in visited:
            reason = f'linked purchase chain loops back on itself after {hop} hop(s)'
            break
        visited.add(linked)

        try:
            current = fetch_subscription(linked)
        except GoogleAPIError as e:
            reason = f'fetching linked purchase {base.obfuscate(linked)} failed: {e}'
            break

    kind = base.ClientKind.Play
    if len(result) == 0:
        if not gen:
            raise CidError(f'Missing cid for purchase token; {reason}')
        log.info(f'Sub: no cid ({reason}), generating a new one; {ctx.tag()}')
        result = cipher.random_hex(CID_BYTES)
        kind   = base.ClientKind.Generated

    if persist:
        _persist_cid(sql_conn, result, kind)
    return result

def resolve_product_cid(ctx: env.ExecCtx, sql_conn: sqlite3.Connection | None, purchase: ProductPurchaseV2Data, gen: bool, persist: bool) -> str:
    result = purchase.obfuscated_external_account_id
    kind   = base.ClientKind.Play
    if len(result) < MIN_CID_LENGTH:
        if not gen:
            raise CidError('Onetime: cid missing; discarding purchase')
        log.info(f'Onetime: no cid, generating a new one; {ctx.tag()}')
        result = cipher.random_hex(CID_BYTES)
        kind   = base.ClientKind.Generated

    if persist:
        _persist_cid(sql_conn, result, kind)
    return result

def _upsert_playorder(ctx: env.ExecCtx, sql_conn: sqlite3.Connection | None, cid: str, purchase_token: str, linked_token: str | None, raw: JSONObject):
    # NOTE: Play Billing deletes a purchase token 60 days after it expires, so the last JSON we saw
    # is kept on file
    upserted = backend.upsert_playorder(sql_conn, cid, purchase_token, linked_token, json.dumps(raw), base.now_unix_ts_ms())
    if not upserted.success:
        log.error(f'Persisting play order for {cid} failed; {ctx.tag()}')

def is_obsoleted(sql_conn: sqlite3.Connection | None, purchase_token: str) -> bool:
    '''A purchase named as the linked token of another purchase has been superseded by it'''
    result = backend.get_first_linked_playorder(sql_conn, purchase_token) is not None
    return result

def ack_subscription(ctx: env.ExecCtx, sub: SubscriptionV2Data, purchase_token: str, ent: session_broker.Entitlement | None, ack_without_entitlement: bool = False):
    if len(sub.line_items) == 0:
        raise ReconcileError(f'Sub: no line items, cannot ack; {ctx.tag()}')

    product_id = sub.line_items[0].product_id
    if ent is None:
        if not ack_without_entitlement:
            raise ReconcileError(f'Sub: no entitlement, cannot ack; {ctx.tag()}')
        platform_google_api.acknowledge_subscription(product_id, purchase_token, None)
    else:
        platform_google_api.acknowledge_subscription(product_id, purchase_token, ent.developer_payload(ctx.env))
    log.info(f'Sub: acknowledged, with entitlement? {ent is not None}; {ctx.tag()}')

def ack_onetime(ctx: env.ExecCtx, product_id: str, purchase_token: str, ent: session_broker.Entitlement | None):
    if ent is None:
        raise ReconcileError(f'Onetime: no entitlement, cannot ack; {ctx.tag()}')
    platform_google_api.acknowledge_product(product_id, purchase_token, ent.developer_payload(ctx.env))
    log.info(f'Onetime: acknowledged {product_id}; {ctx.tag()}')

def delete_entitlement_with_backoff(ctx: env.ExecCtx, sql_conn: sqlite3.Connection | None, cid: str, label: str) -> bool:
    result = False
    for delay_s in REVOKE_BACKOFF_S:
        time.sleep(delay_s)
        try:
            session_broker.delete_entitlement(ctx, sql_conn, cid)
            log.info(f'{label}: deleted entitlement for {cid}; {ctx.tag()}')
            result = True
            break
        except (session_broker.BrokerError, base.ConfigError) as e:
            log.error(f'{label}: deleting entitlement for {cid} failed: {e}; {ctx.tag()}')
    return result

def process_subscription(ctx: env.ExecCtx, sql_conn: sqlite3.Connection | None, cid: str, sub: SubscriptionV2Data, purchase_token: str, revoked: bool) -> bool:
    state     = sub.subscription_state
    active    = state == SubscriptionsV2State.ACTIVE
    expired   = state == SubscriptionsV2State.EXPIRED
    cancelled = state == SubscriptionsV2State.CANCELED
    unpaid    = state == SubscriptionsV2State.PENDING_PURCHASE_CANCELED
    ackd      = sub.acknowledged

    # NOTE: An expired or cancelled subscription that was replaced was upgraded or downgraded
    # rather than churned
    replaced  = (expired or cancelled) and sub.replaced
    obsoleted = is_obsoleted(sql_conn, purchase_token)

    log.info(f'Sub: {cid} at {state} (revoked? {revoked} / replaced? {replaced} / ackd? {ackd} / obsoleted? {obsoleted}); {ctx.tag()}')

    _upsert_playorder(ctx, sql_conn, cid, purchase_token, sub.linked_purchase_token, sub.raw)

    if obsoleted:
        log.info(f'Sub: token is obsoleted, acknowledging without entitlement; {ctx.tag()}')
        if not ackd:
            ack_subscription(ctx, sub, purchase_token, None, ack_without_entitlement=True)
        return True

    if active:
        intent = subscription_info(sub)
        if intent is None or intent.expiry_unix_ts_ms is None:
            log.error(f'Sub: skip ack for {cid}, no known product; {ctx.tag()}')
            return False

        ent = session_broker.get_or_create_entitlement(ctx, sql_conn, cid, intent.expiry_unix_ts_ms, intent.plan, purchase_token=purchase_token)
        if ackd:
            log.info(f'Sub: already acknowledged {cid}; {ctx.tag()}')
            return True
        if ent.status == EntitlementStatus.Banned:
            # NOTE: Never acknowledged, Google refunds it after 3 days
            log.error(f'Sub: {ent.status} {cid}; {ctx.tag()}')
            return True
        if ent.status == EntitlementStatus.Expired:
            raise ReconcileError(f'Sub: entitlement expired for {cid} but subscription is active; {ctx.tag()}')
        ack_subscription(ctx, sub, purchase_token, ent)
        return True

    if cancelled or expired or revoked or unpaid:
        now     = base.now_unix_ts_ms()
        deleted = False
        for item in sub.line_items:
            deferring = item.deferred_item_replacement is not None
            expiry    = item.expiry_time.unix_milliseconds if item.expiry_time is not None else 0
            summary   = (f'{cid} {item.product_id} at {base.readable_unix_ts_ms(expiry)} (cancel? {cancelled} / expired? {expired} / '
                         f'revoked? {revoked} / unpaid? {unpaid} / renew? {item.auto_renew_enabled} / replace? {replaced} / defer? {deferring})')
            if (revoked and not replaced) or unpaid:
                # NOTE: One entitlement per client, every line item maps onto it
                if not deleted:
                    _       = delete_entitlement_with_backoff(ctx, sql_conn, cid, 'Sub')
                    deleted = True
                log.info(f'Sub: revoked {summary}; {ctx.tag()}')
            elif not item.auto_renew_enabled and not deferring and expiry < now:
                # NOTE: The entitlement is retained, the client keeps whatever time the third party
                # has left on the account
                log.warning(f'Sub: skip revoke for lapsed {summary}; grace {ctx.env.grace_period_days} day(s); {ctx.tag()}')
            elif expired:
                log.info(f'Sub: skip revoke for {summary}; {ctx.tag()}')
            else:
                log.error(f'Sub: skip revoke for {summary}; {ctx.tag()}')
        return True

    # NOTE: ON_HOLD, IN_GRACE_PERIOD, PAUSED and PENDING need no action
    log.info(f'Sub: {cid} at {state}, no-op; {ctx.tag()}')
    return True

def handle_subscription_notification(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, purchase_token: str, notification_type: int) -> bool:
    sub = fetch_subscription(purchase_token)
    ctx = env.ExecCtx(env=gateway_env, test=sub.test_purchase, obs_token=base.obfuscate(purchase_token))
    log.info(f'Sub: {_notification_type_label(SubscriptionNotificationType, notification_type)}; {ctx.tag()}')

    cid    = resolve_cid(ctx, sql_conn, sub, gen=True, persist=True)
    result = process_subscription(ctx, sql_conn, cid, sub, purchase_token, revoked=notification_type == SubscriptionNotificationType.REVOKED)
    return result

def handle_onetime_notification(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, purchase_token: str, notification_type: int, sku: str):
    label = _notification_type_label(OneTimeProductNotificationType, notification_type)
    if len(sku) == 0 or sku not in KNOWN_PRODUCTS:
        log.error(f'Onetime: {label}; unknown sku "{sku}" for {base.obfuscate(purchase_token)}')
        return

    purchase  = fetch_product(purchase_token)
    ctx       = env.ExecCtx(env=gateway_env, test=purchase.test_purchase, obs_token=base.obfuscate(purchase_token))
    cancelled = notification_type == OneTimeProductNotificationType.CANCELED or purchase.purchase_state == ProductPurchaseState.CANCELLED
    intent    = onetime_plan(purchase)
    log.info(f'Onetime: {label} / {purchase.purchase_state}|{purchase.acknowledgement_state} sku={sku}; {ctx.tag()}')

    cid = resolve_product_cid(ctx, sql_conn, purchase, gen=True, persist=True)
    _upsert_playorder(ctx, sql_conn, cid, purchase_token, None, purchase.raw)

    if purchase.pending:
        log.info(f'Onetime: payment pending for {cid}; {ctx.tag()}')
        return

    if cancelled:
        _ = delete_entitlement_with_backoff(ctx, sql_conn, cid, 'Onetime')
        return

    if not purchase.paid:
        log.warning(f'Onetime: not paid for {cid} at {purchase.purchase_state}; {ctx.tag()}')
        return

    if intent is None or intent.expiry_unix_ts_ms is None:
        raise ReconcileError(f'Onetime: no plan for paid purchase by {cid}; {ctx.tag()}')

    ent = session_broker.get_or_create_entitlement(ctx, sql_conn, cid, intent.expiry_unix_ts_ms, intent.plan, purchase_token=purchase_token)
    if purchase.acknowledged:
        log.info(f'Onetime: already acknowledged {cid}; {ctx.tag()}')
        return
    if ent.status == EntitlementStatus.Banned:
        log.error(f'Onetime: {ent.status} {cid}; {ctx.tag()}')
        return
    if ent.status == EntitlementStatus.Expired:
        raise ReconcileError(f'Onetime: entitlement expired for {cid} but purchase is paid; {ctx.tag()}')
    ack_onetime(ctx, sku, purchase_token, ent)

def handle_voided_notification(purchase_token: str, order_id: str, product_type: int, refund_type: int):
    # NOTE: The purchase has already been refunded by Google, the revocation that follows it
    # arrives as its own subscription notification
    note = log.info if refund_type == RefundType.FULL_REFUND else log.error
    note(f'Void: purchase {base.obfuscate(purchase_token)}, order {order_id}, '
         f'{_notification_type_label(ProductType, product_type)} {_notification_type_label(RefundType, refund_type)}')

def is_valid_cid(cid: str | None) -> bool:
    result = cid is not None and len(cid) >= MIN_CID_LENGTH and CID_PATTERN.match(cid) is not None
    return result

def validate_request(purchase_token: str, cid: str, sku: str) -> base.JSONResponse | None:
    result = None
    if len(purchase_token) == 0:
        result = base.JSONResponse(400, {'error': 'missing purchase token'})
    elif len(sku) == 0:
        result = base.JSONResponse(400, {'error': 'missing product id'})
    elif not is_valid_cid(cid):
        result = base.JSONResponse(400, {'error': 'missing/invalid client id'})
    return result

def _entitlement_rejection(ent: session_broker.Entitlement, cid: str, purchase_id: str, force: bool) -> base.JSONResponse | None:
    result = None
    if force:
        return result
    if ent.status == EntitlementStatus.Banned:
        result = base.JSONResponse(400, {'error': 'user banned', 'cid': cid, 'purchaseId': purchase_id})
    elif ent.status == EntitlementStatus.Expired:
        result = base.JSONResponse(400, {'error': 'entitlement expired', 'cid': cid, 'purchaseId': purchase_id})
    elif ent.status != EntitlementStatus.Valid:
        result = base.JSONResponse(400, {'error': 'invalid entitlement status', 'status': str(ent.status), 'cid': cid, 'purchaseId': purchase_id})
    return result

def _acknowledge_onetime(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, purchase_token: str, cid: str, sku: str, force: bool) -> base.JSONResponse:
    purchase_id = base.purchase_id(purchase_token)
    purchase    = fetch_product(purchase_token)
    ctx         = env.ExecCtx(env=gateway_env, test=purchase.test_purchase, obs_token=base.obfuscate(purchase_token))

    row = backend.get_playorder(sql_conn, purchase_token)
    if row is None:
        return base.JSONResponse(400, {'error': 'purchase not found', 'purchaseId': purchase_id})

    # NOTE: Identifiers must be immutable for one-time purchases
    if gateway_env.account_ids_immutable and row.cid != cid:
        return base.JSONResponse(400, {'error': 'cid mismatch', 'purchaseId': purchase_id})

    if not purchase.paid or purchase.pending:
        return base.JSONResponse(400, {'error': 'purchase not completed', 'purchaseId': purchase_id})

    intent = onetime_plan(purchase)
    if intent is None or intent.expiry_unix_ts_ms is None:
        return base.JSONResponse(400, {'error': 'missing plan info', 'purchaseId': purchase_id})

    ent       = session_broker.get_or_create_entitlement(ctx, sql_conn, cid, intent.expiry_unix_ts_ms, intent.plan, purchase_token=purchase_token)
    rejection = _entitlement_rejection(ent, cid, purchase_id, force)
    if rejection is not None:
        return rejection

    if not purchase.acknowledged:
        ack_onetime(ctx, sku, purchase_token, ent)

    result = base.JSONResponse(200, {
        'success':          True,
        'message':          'Onetime purchase acknowledged',
        'cid':              cid,
        'productId':        sku,
        'purchaseId':       purchase_id,
        'expiry':           base.iso8601_from_unix_ts_ms(intent.expiry_unix_ts_ms),
        'developerPayload': ent.developer_payload(gateway_env),
    })
    return result

def _acknowledge_subscription(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, purchase_token: str, cid: str, force: bool) -> base.JSONResponse:
    purchase_id = base.purchase_id(purchase_token)
    sub         = fetch_subscription(purchase_token)
    ctx         = env.ExecCtx(env=gateway_env, test=sub.test_purchase, obs_token=base.obfuscate(purchase_token))
    state       = sub.subscription_state
    active      = state == SubscriptionsV2State.ACTIVE
    cancelled   = state == SubscriptionsV2State.CANCELED
    expired     = state == SubscriptionsV2State.EXPIRED
    log.info(f'Ack: sub at {state}/{sub.acknowledgement_state}; {ctx.tag()}')

    # NOTE: A cancelled subscription may still be paid up until its expiry
    if (not active and not cancelled) or expired:
        return base.JSONResponse(400, {'error': 'subscription not active', 'purchaseId': purchase_id, 'state': str(state)})

    intent = subscription_info(sub)
    if intent is None or intent.expiry_unix_ts_ms is None:
        return base.JSONResponse(400, {'error': 'not a valid product', 'purchaseId': purchase_id})

    # NOTE: The client must prove it owns the purchase, a cid is never generated on its behalf
    try:
        existing_cid = resolve_cid(ctx, sql_conn, sub, gen=False, persist=True)
    except CidError as e:
        log.error(f'Ack: validating cid {cid} failed: {e}; {ctx.tag()}')
        return base.JSONResponse(400, {'error': 'cid validation failed', 'cid': cid, 'purchaseId': purchase_id})

    if existing_cid != cid:
        log.error(f'Ack: cid mismatch (us != them) {existing_cid} != {cid}; {ctx.tag()}')
        return base.JSONResponse(400, {'error': f'cid {cid} not registered with purchase token', 'purchaseId': purchase_id})

    _upsert_playorder(ctx, sql_conn, cid, purchase_token, sub.linked_purchase_token, sub.raw)

    expiry_iso = base.iso8601_from_unix_ts_ms(intent.expiry_unix_ts_ms)
    if base.now_unix_ts_ms() > intent.expiry_unix_ts_ms:
        return base.JSONResponse(400, {'error': 'subscription expired', 'cid': cid, 'purchaseId': purchase_id, 'expiry': expiry_iso})

    if is_obsoleted(sql_conn, purchase_token):
        log.info(f'Ack: token is obsoleted, acknowledging without entitlement; {ctx.tag()}')
        if not sub.acknowledged:
            ack_subscription(ctx, sub, purchase_token, None, ack_without_entitlement=True)
        return base.JSONResponse(200, {
            'success':    True,
            'message':    'Subscription acknowledged without entitlement',
            'cid':        cid,
            'productId':  intent.product_id,
            'purchaseId': purchase_id,
            'expiry':     expiry_iso,
        })

    ent       = session_broker.get_or_create_entitlement(ctx, sql_conn, cid, intent.expiry_unix_ts_ms, intent.plan, purchase_token=purchase_token)
    rejection = _entitlement_rejection(ent, cid, purchase_id, force)
    if rejection is not None:
        return rejection

    if not sub.acknowledged:
        ack_subscription(ctx, sub, purchase_token, ent)

    result = base.JSONResponse(200, {
        'success':          True,
        'message':          'Subscription acknowledged',
        'cid':              cid,
        'productId':        intent.product_id,
        'purchaseId':       purchase_id,
        'expiry':           expiry_iso,
        'developerPayload': ent.developer_payload(gateway_env),
    })
    return result

def acknowledge_purchase(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, purchase_token: str, cid: str, sku: str, force: bool = False) -> base.JSONResponse:
    '''
    Acknowledge a purchase on behalf of the client that made it and hand the client its
    entitlement. Safe to call repeatedly, an acknowledged purchase is not re-acknowledged but the
    client's ownership is re-checked every time.
    '''
    result = validate_request(purchase_token, cid, sku)
    if result is not None:
        return result

    try:
        if sku == ONETIME_PRODUCT_ID:
            result = _acknowledge_onetime(sql_conn, gateway_env, purchase_token, cid, sku, force)
        else:
            result = _acknowledge_subscription(sql_conn, gateway_env, purchase_token, cid, force)
    except ENDPOINT_ERRORS + (ReconcileError,) as e:
        log.error(f'Ack: failed for {base.obfuscate(purchase_token)}: {e}')
        result = base.JSONResponse(500, {'error': 'acknowledge failed', 'details': str(e), 'purchaseId': base.purchase_id(purchase_token)})
    return result

def subscriptions_more_or_less_equal(a: SubscriptionV2Data | None, b: SubscriptionV2Data | None, account_ids_immutable: bool) -> bool:
    result = False
    if a is None or b is None:
        return result
    if account_ids_immutable and a.obfuscated_external_account_id != b.obfuscated_external_account_id:
        return result
    result = a.test_purchase == b.test_purchase
    return result

def _owned_playorder(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, purchase_token: str, cid: str, verb: str) -> tuple[backend.PlayOrderRow | None, base.JSONResponse | None]:
    purchase_id = base.purchase_id(purchase_token)
    row         = backend.get_playorder(sql_conn, purchase_token)
    if row is None:
        log.error(f'{verb.capitalize()}: {base.obfuscate(purchase_token)} not found')
        return None, base.JSONResponse(400, {'error': 'subscription not found', 'purchaseId': purchase_id})
    if gateway_env.account_ids_immutable and row.cid != cid:
        log.error(f'{verb.capitalize()}: cid mismatch {cid} != {row.cid}')
        return None, base.JSONResponse(400, {'error': f'cannot {verb}, cid mismatch', 'purchaseId': purchase_id})
    return row, None

def _live_subscription_matching(gateway_env: env.Env, row: backend.PlayOrderRow, purchase_token: str) -> SubscriptionV2Data | None:
    '''The live subscription, if it still looks like the one on file'''
    stored = None
    try:
        stored = platform_google_api.parse_subscription_v2(json.loads(row.meta or ''), base.ErrorSink())
    except json.JSONDecodeError:
        log.error(f'Stored play order for {base.obfuscate(purchase_token)} is not JSON')

    live   = fetch_subscription(purchase_token)
    result = live if subscriptions_more_or_less_equal(stored, live, gateway_env.account_ids_immutable) else None
    return result

def _cancelled_or_expired_response(sub: SubscriptionV2Data, purchase_id: str) -> base.JSONResponse | None:
    expired   = sub.subscription_state == SubscriptionsV2State.EXPIRED
    cancelled = sub.subscription_state == SubscriptionsV2State.CANCELED
    result    = None
    if cancelled or expired:
        cancel_ctx = dataclasses.asdict(sub.canceled_state_context) if sub.canceled_state_context is not None else None
        result     = base.JSONResponse(200, {
            'success':    False,
            'message':    'cannot revoke, subscription cancelled or expired',
            'expired':    expired,
            'cancelled':  cancelled,
            'cancelCtx':  cancel_ctx,
            'purchaseId': purchase_id,
        })
    return result

def refund_onetime_purchase(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, cid: str, purchase_token: str) -> base.JSONResponse:
    purchase_id = base.purchase_id(purchase_token)
    purchase    = fetch_product(purchase_token)
    ctx         = env.ExecCtx(env=gateway_env, test=purchase.test_purchase, obs_token=base.obfuscate(purchase_token))
    intent      = onetime_plan(purchase)
    order_id    = purchase.order_id
    log.info(f'Onetime: refund request for {cid}; order {order_id}; {ctx.tag()}')

    if len(order_id) == 0:
        return base.JSONResponse(400, {'error': 'missing order information', 'purchaseId': purchase_id})

    # NOTE: A purchase with no known plan granted nothing, it is refunded unconditionally
    if intent is not None and not intent.within_refund_window(base.now_unix_ts_ms()):
        return base.JSONResponse(400, {
            'error':      'refund window exceeded',
            'purchaseId': purchase_id,
            'orderId':    order_id,
            'windowDays': intent.refund_window_days,
            'start':      base.iso8601_from_unix_ts_ms(intent.start_unix_ts_ms or 0),
            'expiry':     base.iso8601_from_unix_ts_ms(intent.expiry_unix_ts_ms or 0),
        })

    platform_google_api.refund_order(order_id)

    try:
        session_broker.delete_entitlement(ctx, sql_conn, cid)
    except session_broker.BrokerError as e:
        log.error(f'Onetime: refunded but deleting entitlement for {cid} failed: {e}; {ctx.tag()}')

    log.info(f'Onetime: refunded order {order_id} for {cid}; {ctx.tag()}')
    result = base.JSONResponse(200, {
        'success':        True,
        'message':        'refunded onetime purchase',
        'hadEntitlement': intent is not None,
        'purchaseId':     purchase_id,
        'orderId':        order_id,
    })
    return result

def cancel_subscription(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, purchase_token: str, cid: str, sku: str) -> base.JSONResponse:
    '''Stop the subscription from renewing, the client keeps its entitlement until expiry'''
    result = validate_request(purchase_token, cid, sku)
    if result is not None:
        return result

    purchase_id = base.purchase_id(purchase_token)
    try:
        row, result = _owned_playorder(sql_conn, gateway_env, purchase_token, cid, 'cancel')
        if result is not None:
            return result
        assert row is not None

        if sku == ONETIME_PRODUCT_ID:
            return refund_onetime_purchase(sql_conn, gateway_env, cid, purchase_token)

        sub = _live_subscription_matching(gateway_env, row, purchase_token)
        if sub is None or len(sub.line_items) == 0:
            return base.JSONResponse(400, {'error': 'cannot cancel, subscription mismatch', 'purchaseId': purchase_id})

        result = _cancelled_or_expired_response(sub, purchase_id)
        if result is not None:
            return result

        try:
            platform_google_api.cancel_subscription(sub.line_items[0].product_id, purchase_token)
        except GoogleAPIError as e:
            log.error(f'Cancel: {base.obfuscate(purchase_token)} failed: {e}')
            return base.JSONResponse(400, {'error': f'failed to cancel subscription: {e.status} {e.details}', 'purchaseId': purchase_id})

        log.info(f'Cancel: cancelled {base.obfuscate(purchase_token)} for {cid}')
        result = base.JSONResponse(200, {'success': True, 'message': 'cancelled subscription', 'purchaseId': purchase_id})
    except ENDPOINT_ERRORS as e:
        log.error(f'Cancel: failed for {base.obfuscate(purchase_token)}: {e}')
        result = base.JSONResponse(500, {'error': 'cancel failed', 'details': str(e), 'purchaseId': purchase_id})
    return result

def revoke_subscription(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, purchase_token: str, cid: str, sku: str) -> base.JSONResponse:
    '''
    Revoke and fully refund a subscription the client bought recently. The entitlement itself is
    deleted when Google sends the REVOKED notification that follows.
    '''
    result = validate_request(purchase_token, cid, sku)
    if result is not None:
        return result

    purchase_id = base.purchase_id(purchase_token)
    try:
        row, result = _owned_playorder(sql_conn, gateway_env, purchase_token, cid, 'revoke')
        if result is not None:
            return result
        assert row is not None

        if sku == ONETIME_PRODUCT_ID:
            return refund_onetime_purchase(sql_conn, gateway_env, cid, purchase_token)

        sub = _live_subscription_matching(gateway_env, row, purchase_token)
        if sub is None:
            return base.JSONResponse(400, {'error': 'cannot cancel, subscription mismatch', 'purchaseId': purchase_id})

        result = _cancelled_or_expired_response(sub, purchase_id)
        if result is not None:
            return result

        # NOTE: Subscriptions with no known plan granted nothing, they are revoked unconditionally
        intent = subscription_info(sub)
        if intent is not None and not intent.within_refund_window(base.now_unix_ts_ms()):
            log.error(f'Revoke: {base.obfuscate(purchase_token)} started too long ago')
            return base.JSONResponse(400, {
                'error':      'cannot revoke, sub too old, email hello@celzero.com',
                'windowDays': intent.refund_window_days,
                'start':      base.iso8601_from_unix_ts_ms(intent.start_unix_ts_ms or 0),
                'expiry':     base.iso8601_from_unix_ts_ms(intent.expiry_unix_ts_ms or 0),
                'purchaseId': purchase_id,
            })

        try:
            platform_google_api.revoke_subscription(purchase_token)
        except GoogleAPIError as e:
            log.error(f'Revoke: {base.obfuscate(purchase_token)} failed: {e}')
            return base.JSONResponse(400, {'error': f'Failed to revoke subscription: {e.status} {e.details}', 'purchaseId': purchase_id})

        log.info(f'Revoke: revoked {base.obfuscate(purchase_token)} for {cid}')
        result = base.JSONResponse(200, {
            'success':        True,
            'hadEntitlement': intent is not None,
            'message':        'revoked subscription',
            'purchaseId':     purchase_id,
        })
    except ENDPOINT_ERRORS as e:
        log.error(f'Revoke: failed for {base.obfuscate(purchase_token)}: {e}')
        result = base.JSONResponse(500, {'error': 'revoke failed', 'details': str(e), 'purchaseId': purchase_id})
    return result

def get_entitlement(sql_conn: sqlite3.Connection | None, gateway_env: env.Env, cid: str, test: bool) -> base.JSONResponse:
    '''
    Only served by deployments running in the platform testing environment. Nothing but the cid
    is checked here, so anyone who knows a cid could read its entitlement.
    '''
    if not is_valid_cid(cid):
        return base.JSONResponse(400, {'error': 'missing/invalid client id'})
    if not test:
        return base.JSONResponse(400, {'error': 'test api', 'cid': cid})

    ctx = env.ExecCtx(env=gateway_env, test=test)
    try:
        ent = session_broker.creds(ctx, sql_conn, cid)
        if ent is None:
            return base.JSONResponse(400, {'error': 'entitlement not found', 'cid': cid})
        if ent.status == EntitlementStatus.Banned:
            return base.JSONResponse(400, {'error': 'user banned', 'cid': cid})
        result = base.JSONResponse(200, {'success': True, 'cid': cid, 'developerPayload': ent.developer_payload(gateway_env)})
    except ENDPOINT_ERRORS as e:
        result = base.JSONResponse(500, {'error': 'get entitlements failed', 'details': str(e)})
    return result
