'''
Testing module for the RPN gateway, testing internal and public APIs.

The backend tests call the DB APIs directly to test the outcome on the tables in the SQLite
database. Providers (Google Play, Stripe and the third-party session API) are replaced with
in-process fakes via monkeypatch so that every flow runs offline.

The server tests spin up a local Flask instance as per
(https://flask.palletsprojects.com/en/stable/testing/#sending-requests-with-the-test-client) and
send a request using the test client and we vet the request and response produced by hitting said
endpoint.
'''

import json
import types
import base64
import typing
import sqlite3
import datetime
import traceback
import dataclasses

import flask
import flask.testing
import pytest
import stripe
import googleapiclient.errors

import base
import env
import backend
import cipher
import server
import session_broker
import session_proxy
import platform_google
import platform_google_api
import platform_stripe
from platform_google_api import GoogleAPIError
from platform_google_types import GoogleTimestamp, EntitlementIntent, SubscriptionV2Data, SubscriptionV2DataLineItem, \
    STANDARD_PRODUCT_ID, ONETIME_PRODUCT_ID, MONTHLY_BASE_PLAN_ID, YEARLY_BASE_PLAN_ID, TWO_YEARLY_BASE_PLAN_ID
from session_broker import EntitlementStatus, Plan

def make_env() -> env.Env:
    result = env.Env(kdf_secret_d1         = 'd1' * 32,
                     kdf_secret_client     = 'c1' * 32,
                     kdf_secret_xsvc       = 'e5' * 32,
                     ws_wl_id              = 'wl-id',
                     ws_wl_token           = 'wl-token',
                     ws_test_wl_id         = 'wl-test-id',
                     ws_test_wl_token      = 'wl-test-token',
                     stripe_api_key        = 'sk_test_gateway',
                     stripe_webhook_secret = 'whsec_gateway')
    return result

def make_cid() -> str:
    result = cipher.random_hex(32)
    return result

@dataclasses.dataclass
class TestingContext:
    """
    Sets up a database with the necessary tables and flask instance that you can simulate HTTP
    requests to, to target the gateway routes. This class is designed to be used in a `with`
    context such that the DB is closed on scope exit.

    For tests, this means you probably want to supply a in-memory URI-style path to make a transient
    DB that is wiped on scope exit. This means tests have a fresh DB to work with for each `with`
    context and each chunk of tests to execute.
    """

    db:           backend.SetupDBResult
    sql_conn:     sqlite3.Connection
    flask_app:    flask.Flask
    flask_client: flask.testing.FlaskClient
    gateway_env:  env.Env

    db_path:      str  = ''
    uri:          bool = False

    def __init__(self, db_path: str, uri: bool, gateway_env: env.Env | None = None):
        self.db_path     = db_path
        self.uri         = uri
        self.gateway_env = gateway_env if gateway_env is not None else make_env()

    def __enter__(self):
        err     = base.ErrorSink()
        self.db = backend.setup_db(path=self.db_path, uri=self.uri, err=err)
        assert len(err.msg_list) == 0, f'{err.msg_list}'

        self.flask_app    = server.init(testing_mode   = True,
                                        db_path        = self.db_path,
                                        db_path_is_uri = self.uri,
                                        gateway_env    = self.gateway_env)
        self.flask_client = self.flask_app.test_client()
        assert self.db.sql_conn
        self.sql_conn = self.db.sql_conn
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

def yyyy_mm_dd(unix_ts_ms: int) -> str:
    result = datetime.datetime.fromtimestamp(unix_ts_ms / 1000.0, tz=datetime.timezone.utc).strftime('%Y-%m-%d')
    return result

@dataclasses.dataclass
class FakeSessionAPI:
    """
    Stands in for the third-party session API. Accounts are keyed by their session secret, a
    month plan extends the account by one calendar month and a year plan by twelve.
    """
    users:        dict[str, session_broker.WSUser] = dataclasses.field(default_factory=dict)
    created:      list[str]                        = dataclasses.field(default_factory=list)
    deleted:      list[str]                        = dataclasses.field(default_factory=list)
    updates:      list[str]                        = dataclasses.field(default_factory=list)
    user_status:  int                              = 1
    fail_updates: bool                             = False

    def _extend(self, expiry_unix_ts_ms: int, plan: Plan) -> str:
        start  = max(expiry_unix_ts_ms, base.now_unix_ts_ms())
        months = 12 if plan == Plan.Year else 1
        # NOTE: Pad by a day, the date is truncated to midnight when it is read back
        result = yyyy_mm_dd(base.add_months_to_unix_ts_ms(start, months) + base.MILLISECONDS_IN_DAY)
        return result

    def create_user(self, ctx: env.ExecCtx, plan: Plan) -> session_broker.WSUser:
        n      = len(self.created)
        result = session_broker.WSUser(user_id             = f'user{n}',
                                       session_auth_hash   = f'{n}:4:{base.now_unix_ts_ms() // 1000}:{cipher.random_hex(8)}:{cipher.random_hex(8)}',
                                       status              = self.user_status,
                                       premium_expiry_date = self._extend(0, plan))
        self.users[result.session_auth_hash] = result
        self.created.append(result.session_auth_hash)
        return result

    def session_status(self, ctx: env.ExecCtx, sessiontoken: str) -> tuple[EntitlementStatus, session_broker.WSUser | None]:
        user = self.users.get(sessiontoken)
        if user is None:
            return (EntitlementStatus.Invalid, None)
        return (session_broker.status_of(user, base.now_unix_ts_ms()), user)

    def update_user(self, ctx: env.ExecCtx, sessiontoken: str, plan: Plan):
        user = self.users.get(sessiontoken)
        if user is None or self.fail_updates:
            raise session_broker.BrokerError(f'Update user to {plan} was not successful')
        user.premium_expiry_date = self._extend(user.expiry_unix_ts_ms, plan)
        self.updates.append(sessiontoken)

    def delete_user(self, ctx: env.ExecCtx, sessiontoken: str) -> bool:
        _ = self.users.pop(sessiontoken, None)
        self.deleted.append(sessiontoken)
        return True

    def install(self, monkeypatch):
        monkeypatch.setattr("session_broker.ws_create_user",    self.create_user)
        monkeypatch.setattr("session_broker.ws_session_status", self.session_status)
        monkeypatch.setattr("session_broker.ws_update_user",    self.update_user)
        monkeypatch.setattr("session_broker.ws_delete_user",    self.delete_user)

@dataclasses.dataclass
class FakePlayAPI:
    """Stands in for the Google Play Developer API, purchases are served from the dicts by token"""
    subscriptions: dict[str, base.JSONObject]          = dataclasses.field(default_factory=dict)
    products:      dict[str, base.JSONObject]          = dataclasses.field(default_factory=dict)
    sub_acks:      list[tuple[str, str | None]]        = dataclasses.field(default_factory=list)
    product_acks:  list[tuple[str, str, str | None]]   = dataclasses.field(default_factory=list)
    cancelled:     list[str]                           = dataclasses.field(default_factory=list)
    revoked:       list[str]                           = dataclasses.field(default_factory=list)
    refunded:      list[str]                           = dataclasses.field(default_factory=list)

    def get_subscription_v2(self, purchase_token: str, err: base.ErrorSink) -> SubscriptionV2Data | None:
        if purchase_token not in self.subscriptions:
            raise GoogleAPIError('GET purchases failed', 404, 'The purchase token was not found')
        response = json.loads(json.dumps(self.subscriptions[purchase_token]))
        return platform_google_api.parse_subscription_v2(response, err)

    def get_product_v2(self, purchase_token: str, err: base.ErrorSink):
        if purchase_token not in self.products:
            raise GoogleAPIError('GET purchases failed', 404, 'The purchase token was not found')
        response = json.loads(json.dumps(self.products[purchase_token]))
        return platform_google_api.parse_product_v2(response, err)

    def install(self, monkeypatch):
        monkeypatch.setattr("platform_google_api.get_subscription_v2",      self.get_subscription_v2)
        monkeypatch.setattr("platform_google_api.get_product_v2",           self.get_product_v2)
        monkeypatch.setattr("platform_google_api.acknowledge_subscription", lambda product_id, token, payload: self.sub_acks.append((token, payload)))
        monkeypatch.setattr("platform_google_api.acknowledge_product",      lambda product_id, token, payload: self.product_acks.append((product_id, token, payload)))
        monkeypatch.setattr("platform_google_api.cancel_subscription",      lambda product_id, token: self.cancelled.append(token))
        monkeypatch.setattr("platform_google_api.revoke_subscription",      lambda token: self.revoked.append(token))
        monkeypatch.setattr("platform_google_api.refund_order",             lambda order_id: self.refunded.append(order_id))
        monkeypatch.setattr("time.sleep",                                   lambda *args, **kwargs: None)

def google_subscription_json(cid:                   str,
                             start_unix_ts_ms:      int,
                             expiry_unix_ts_ms:     int,
                             state:                 str        = 'SUBSCRIPTION_STATE_ACTIVE',
                             ack:                   str        = 'ACKNOWLEDGEMENT_STATE_PENDING',
                             base_plan_id:          str        = MONTHLY_BASE_PLAN_ID,
                             auto_renew:            bool       = True,
                             linked_purchase_token: str | None = None,
                             replaced:              bool       = False) -> base.JSONObject:
    result: base.JSONObject = {
        'kind':                 'androidpublisher#subscriptionPurchaseV2',
        'regionCode':           'IN',
        'startTime':            base.iso8601_from_unix_ts_ms(start_unix_ts_ms),
        'subscriptionState':    state,
        'acknowledgementState': ack,
        'testPurchase':         {},
        'lineItems': [{
            'productId':               STANDARD_PRODUCT_ID,
            'expiryTime':              base.iso8601_from_unix_ts_ms(expiry_unix_ts_ms),
            'autoRenewingPlan':        {'autoRenewEnabled': auto_renew},
            'offerDetails':            {'basePlanId': base_plan_id},
            'latestSuccessfulOrderId': 'GPA.3312-0000-0000-00001',
        }],
    }
    if len(cid) > 0:
        result['externalAccountIdentifiers'] = {'obfuscatedExternalAccountId': cid}
    if linked_purchase_token is not None:
        result['linkedPurchaseToken'] = linked_purchase_token
    if replaced:
        result['canceledStateContext'] = {'replacementCancellation': {}}
    return result

def google_product_json(cid: str, completion_unix_ts_ms: int, purchase_option_id: str = TWO_YEARLY_BASE_PLAN_ID, state: str = 'PURCHASED') -> base.JSONObject:
    result: base.JSONObject = {
        'kind':                        'androidpublisher#productPurchaseV2',
        'productLineItem':             [{'productId': ONETIME_PRODUCT_ID, 'productOfferDetails': {'purchaseOptionId': purchase_option_id}}],
        'purchaseStateContext':        {'purchaseState': state},
        'testPurchaseContext':         {'fopType': 'TEST'},
        'acknowledgementState':        'ACKNOWLEDGEMENT_STATE_PENDING',
        'purchaseCompletionTime':      base.iso8601_from_unix_ts_ms(completion_unix_ts_ms),
        'orderId':                     'GPA.3312-0000-0000-00002',
        'obfuscatedExternalAccountId': cid,
    }
    return result

def rtdn_subscription(purchase_token: str, notification_type: int) -> base.JSONObject:
    result: base.JSONObject = {
        'version':         '1.0',
        'packageName':     'com.celzero.bravedns',
        'eventTimeMillis': str(base.now_unix_ts_ms()),
        'subscriptionNotification': {
            'version':          '1.0',
            'notificationType': notification_type,
            'purchaseToken':    purchase_token,
        },
    }
    return result

def rtdn_onetime(purchase_token: str, notification_type: int, sku: str = ONETIME_PRODUCT_ID) -> base.JSONObject:
    result: base.JSONObject = {
        'version':         '1.0',
        'packageName':     'com.celzero.bravedns',
        'eventTimeMillis': str(base.now_unix_ts_ms()),
        'oneTimeProductNotification': {
            'version':          '1.0',
            'notificationType': notification_type,
            'purchaseToken':    purchase_token,
            'sku':              sku,
        },
    }
    return result

def developer_payload_ws(gateway_env: env.Env, payload: str | None) -> base.JSONObject:
    '''Unwrap the entitlement the gateway attached to an acknowledgement, decrypting its secret'''
    assert payload is not None
    result = json.loads(payload)['ws']
    assert result['kind'] == session_broker.ENTITLEMENT_KIND
    result['sessiontoken'] = cipher.decrypt_from_client(gateway_env, result['cid'], result['sessiontoken'])
    return result

def test_base_json_getters_transaction_and_db_dump(monkeypatch, capsys):
    if 1: # Typed getters report wrong types and missing required keys, bools never pass as ints
        err = base.ErrorSink()
        d: base.JSONObject = {'n': 1, 'flag': True, 's': 'x', 'o': {'k': 1}}
        assert base.json_dict_require_int(d, 'n', err) == 1
        assert base.json_dict_optional_str(d, 'missing', err) is None
        assert base.json_dict_optional_obj(d, 'o', err) == {'k': 1}
        assert base.json_dict_optional_bool(d, 'flag', False, err) is True
        assert not err.has()

        assert base.json_dict_require_int(d, 'flag', err) == 0
        assert base.json_dict_require_str(d, 'missing', err) == ''
        assert len(err.msg_list) == 2 and 'was not an integer' in err.msg_list[0] and 'missing' in err.msg_list[1]

    if 1: # A cancelled or failed transaction leaves nothing behind
        conn = sqlite3.connect(':memory:')
        _    = conn.execute('CREATE TABLE t (v INTEGER)')
        conn.commit()
        with base.SQLTransaction(conn) as tx:
            assert tx.cursor is not None
            _         = tx.cursor.execute('INSERT INTO t VALUES (1)')
            tx.cancel = True
        with pytest.raises(ValueError):
            with base.SQLTransaction(conn) as tx:
                assert tx.cursor is not None
                _ = tx.cursor.execute('INSERT INTO t VALUES (2)')
                raise ValueError('abort')
        with base.SQLTransaction(conn) as tx:
            assert tx.cursor is not None
            _ = tx.cursor.execute('INSERT INTO t VALUES (3)')
        assert conn.execute('SELECT v FROM t').fetchall() == [(3,)]
        conn.close()

    if 1: # Boolean flags from the environment are strictly 0 or 1
        monkeypatch.setenv('RPN_GATEWAY_TEST_FLAG', '1')
        assert base.os_get_boolean_env('RPN_GATEWAY_TEST_FLAG') is True
        monkeypatch.delenv('RPN_GATEWAY_TEST_FLAG')
        assert base.os_get_boolean_env('RPN_GATEWAY_TEST_FLAG', True) is True
        monkeypatch.setenv('RPN_GATEWAY_TEST_FLAG', 'yes')
        with pytest.raises(ValueError):
            _ = base.os_get_boolean_env('RPN_GATEWAY_TEST_FLAG')

    if 1: # The table dump names client kinds and hides tokens
        err                       = base.ErrorSink()
        db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
        assert db.sql_conn
        cid = make_cid()
        assert backend.insert_client_if_absent(db.sql_conn, cid, None, base.ClientKind.Generated, 1).success
        assert backend.upsert_playorder(db.sql_conn, cid, 'purchase-token-secret', None, '{"orderId": "GPA.1"}', 1).success
        base.print_db_to_stdout(db.sql_conn)
        out = capsys.readouterr().out
        assert 'Table: clients' in out and 'Generated (1)' in out
        assert 'purchase-token-secret' not in out and '<json (20)>' in out
        db.sql_conn.close()

def test_cipher_storage_round_trip_and_tamper():
    gateway_env = make_env()
    cid         = make_cid()
    secret      = '7:4:1700000000:aabbcc:ddeeff'

    ciphertext = cipher.encrypt_for_storage(gateway_env, cid, 'user7', cipher.SESSIONTOKEN_AAD, secret)
    assert ciphertext is not None
    assert len(ciphertext) == (len(secret) + cipher.TAG_SIZE) * 2

    # NOTE: Nonce is derived from the purpose tag and client so the output is deterministic
    assert cipher.encrypt_for_storage(gateway_env, cid, 'user7', cipher.SESSIONTOKEN_AAD, secret) == ciphertext
    assert cipher.encrypt_for_storage(gateway_env, cid, 'user8', cipher.SESSIONTOKEN_AAD, secret) != ciphertext
    assert cipher.encrypt_for_storage(gateway_env, make_cid(), 'user7', cipher.SESSIONTOKEN_AAD, secret) != ciphertext

    assert cipher.decrypt_from_storage(gateway_env, cid, 'user7', cipher.SESSIONTOKEN_AAD, ciphertext) == secret

    # NOTE: Wrong AAD, tag, client or flipped ciphertext all fail without raising
    flipped = ('0' if ciphertext[0] != '0' else '1') + ciphertext[1:]
    assert cipher.decrypt_from_storage(gateway_env, cid, 'user7', None, ciphertext)                    is None
    assert cipher.decrypt_from_storage(gateway_env, cid, 'user8', cipher.SESSIONTOKEN_AAD, ciphertext) is None
    assert cipher.decrypt_from_storage(gateway_env, make_cid(), 'user7', cipher.SESSIONTOKEN_AAD, ciphertext) is None
    assert cipher.decrypt_from_storage(gateway_env, cid, 'user7', cipher.SESSIONTOKEN_AAD, flipped)    is None
    assert cipher.decrypt_from_storage(gateway_env, cid, 'user7', cipher.SESSIONTOKEN_AAD, 'zz')       is None

def test_cipher_storage_aad_cutover():
    cutover = 1_750_000_000_000
    assert cipher.storage_aad(cutover - 1, cutover) is None
    assert cipher.storage_aad(cutover,     cutover) is None
    assert cipher.storage_aad(cutover + 1, cutover) == cipher.SESSIONTOKEN_AAD

def test_cipher_client_round_trip():
    gateway_env = make_env()
    cid         = make_cid()
    secret      = '7:4:1700000000:aabbcc:ddeeff'

    first  = cipher.encrypt_for_client(gateway_env, cid, secret)
    second = cipher.encrypt_for_client(gateway_env, cid, secret)
    assert first is not None and second is not None

    # NOTE: Random nonce, prepended
    assert first != second
    assert first[:cipher.NONCE_SIZE * 2] != second[:cipher.NONCE_SIZE * 2]
    assert len(first) == (cipher.NONCE_SIZE + len(secret) + cipher.TAG_SIZE) * 2

    assert cipher.decrypt_from_client(gateway_env, cid, first)  == secret
    assert cipher.decrypt_from_client(gateway_env, cid, second) == secret
    assert cipher.decrypt_from_client(gateway_env, make_cid(), first) is None
    assert cipher.decrypt_from_client(gateway_env, cid, first[:cipher.NONCE_SIZE * 2]) is None

    # NOTE: Client keys come from their own root secret
    other_env                   = make_env()
    other_env.kdf_secret_client = 'c2' * 32
    assert cipher.decrypt_from_client(other_env, cid, first) is None

def test_cipher_missing_or_short_secret():
    gateway_env                   = make_env()
    gateway_env.kdf_secret_client = ''
    assert cipher.encrypt_for_client(gateway_env, make_cid(), 'secret') is None

    gateway_env.kdf_secret_d1 = 'ab' * 16
    assert cipher.encrypt_for_storage(gateway_env, make_cid(), 'user1', None, 'secret') is None

    assert cipher.derive_key('not hex', b'ctx')   is None
    assert cipher.derive_key('ab' * 32, b'')      is None
    assert cipher.derive_key('ab' * 32, b'a') != cipher.derive_key('ab' * 32, b'b')

def test_cipher_cross_service():
    gateway_env = make_env()

    # NOTE: Friday 1st Aug 2025, midday UTC
    friday = 1754006400000 + base.MILLISECONDS_IN_DAY // 2
    assert cipher.cross_service_aad(friday)                              == b'5/7/2025'
    assert cipher.cross_service_aad(friday + base.MILLISECONDS_IN_DAY * 2) == b'0/7/2025'

    ciphertext = cipher.encrypt_cross_service(gateway_env, 'PEM', friday)
    assert ciphertext is not None
    assert cipher.decrypt_cross_service(gateway_env, ciphertext, friday + 1000) == 'PEM'
    assert cipher.decrypt_cross_service(gateway_env, ciphertext, friday + base.MILLISECONDS_IN_DAY) is None

def test_cipher_hmac():
    key = b'k' * 32
    sig = cipher.hmac_sign(key, b'blinded-msg')
    assert len(sig) == 32
    assert cipher.hmac_verify(key, b'blinded-msg', sig)
    assert not cipher.hmac_verify(key, b'blinded-msg!', sig)
    assert not cipher.hmac_verify(b'j' * 32, b'blinded-msg', sig)

def test_backend_playorder_upsert_is_last_write_wins():
    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    owner = make_cid()
    other = make_cid()
    assert backend.insert_client_if_absent(db.sql_conn, owner, None, base.ClientKind.Play, 1).success
    assert backend.insert_client_if_absent(db.sql_conn, other, None, base.ClientKind.Play, 1).success

    # NOTE: Inserting an existing client is a no-op, not an error
    again = backend.insert_client_if_absent(db.sql_conn, owner, None, base.ClientKind.Generated, 2)
    assert again.success and again.rows_affected == 0
    client = backend.get_client(db.sql_conn, owner)
    assert client is not None and client.kind == base.ClientKind.Play and client.ctime_unix_ts_ms == 1

    assert backend.upsert_playorder(db.sql_conn, owner, 'tok', None,  '{"n": 1}', 10).success
    assert backend.upsert_playorder(db.sql_conn, other, 'tok', 'old', '{"n": 2}', 20).success

    row = backend.get_playorder(db.sql_conn, 'tok')
    assert row is not None
    assert row.cid              == owner
    assert row.meta             == '{"n": 2}'
    assert row.linkedtoken      == 'old'
    assert row.ctime_unix_ts_ms == 10
    assert row.mtime_unix_ts_ms == 20
    assert db.sql_conn.execute('SELECT COUNT(*) FROM playorders').fetchall()[0][0] == 1

    linked = backend.get_first_linked_playorder(db.sql_conn, 'old')
    assert linked is not None and linked.purchasetoken == 'tok'
    assert backend.get_first_linked_playorder(db.sql_conn, 'tok') is None
    assert backend.get_playorder(db.sql_conn, 'missing') is None
    db.sql_conn.close()

def test_backend_credential_constraints():
    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    cid = make_cid()

    # NOTE: Credentials must belong to a known client
    assert not backend.insert_credential(db.sql_conn, cid, 'user1', 'aa', 1).success
    assert backend.insert_client_if_absent(db.sql_conn, cid, None, base.ClientKind.Play, 1).success

    # NOTE: And reference a known order if they name one
    assert not backend.insert_credential(db.sql_conn, cid, 'user1', 'aa', 1, purchase_token='unknown').success

    assert backend.insert_credential(db.sql_conn, cid, 'user1', 'aa', 1).success
    assert not backend.insert_credential(db.sql_conn, cid, 'user2', 'bb', 2).success

    row = backend.get_credential(db.sql_conn, cid)
    assert row is not None and row.userid == 'user1' and row.sessiontoken == 'aa'

    assert backend.touch_credential(db.sql_conn, cid, 5).rows_affected == 1
    row = backend.get_credential(db.sql_conn, cid)
    assert row is not None and row.mtime_unix_ts_ms == 5 and row.ctime_unix_ts_ms == 1

    assert backend.delete_credential(db.sql_conn, cid).rows_affected == 1
    assert backend.get_credential(db.sql_conn, cid) is None

    if 1: # Credentials granted by a Stripe checkout pin its order
        assert not backend.insert_credential(db.sql_conn, cid, 'user3', 'cc', 6, sid='cs_unknown').success
        assert backend.upsert_stripeorder(db.sql_conn, 'cs_1', 'prod', '{}', 6).success
        assert backend.insert_credential(db.sql_conn, cid, 'user3', 'cc', 6, sid='cs_1').success
        with pytest.raises(sqlite3.IntegrityError):
            _ = db.sql_conn.execute('DELETE FROM stripeorders WHERE sid = ?', ('cs_1',))

    with pytest.raises(base.ConfigError):
        _ = backend.get_credential(None, cid)
    db.sql_conn.close()

def test_backend_latest_payee():
    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    assert backend.insert_payee(db.sql_conn, 'cs_1', 'ref', 'complete', 'paid',   'prod', '{}', 100).success
    assert backend.insert_payee(db.sql_conn, 'cs_2', 'ref', 'expired',  'unpaid', 'prod', '{}', 200).success
    assert backend.insert_payee(db.sql_conn, 'cs_3', 'xyz', 'complete', 'paid',   'prod', '{}', 300).success

    payee = backend.get_latest_payee_by_ref(db.sql_conn, 'ref')
    assert payee is not None and payee.id == 'cs_2' and payee.pay_stat == 'unpaid'
    assert backend.get_latest_payee_by_ref(db.sql_conn, 'nobody') is None

    if 1: # Settled sessions are kept as orders, a redelivery refreshes the JSON in place
        assert backend.upsert_stripeorder(db.sql_conn, 'cs_1', 'prod', '{"v": 1}', 100).success
        assert backend.upsert_stripeorder(db.sql_conn, 'cs_1', 'prod', '{"v": 2}', 400).success
        order = backend.get_stripeorder(db.sql_conn, 'cs_1')
        assert order is not None and order.meta == '{"v": 2}' and order.ctime_unix_ts_ms == 100 and order.cid is None
        assert backend.get_stripeorder(db.sql_conn, 'cs_2') is None

    info = backend.db_info_string(db.sql_conn, ':memory:', err)
    assert not err.has() and 'Play/Stripe Orders:          0/1' in info and info.endswith('3/0')
    db.sql_conn.close()

def test_broker_plan_for_expiry():
    # NOTE: 15th Jan 2025, midday UTC
    since = 1736942400000

    assert session_broker.plan_for_expiry(base.add_months_to_unix_ts_ms(since, 13), since, False) == (Plan.Year,  1)
    assert session_broker.plan_for_expiry(base.add_months_to_unix_ts_ms(since, 3),  since, False) == (Plan.Month, 3)
    assert session_broker.plan_for_expiry(since + base.MILLISECONDS_IN_DAY * 12,   since, False) == (Plan.Month, 1)
    assert session_broker.plan_for_expiry(since + base.MILLISECONDS_IN_DAY * 5,    since, False) == (Plan.Unknown, 0)

    # NOTE: Under a day left is only provisioned for test purchases
    assert session_broker.plan_for_expiry(since + base.MILLISECONDS_IN_DAY // 2, since, False) == (Plan.Unknown, 0)
    assert session_broker.plan_for_expiry(since + base.MILLISECONDS_IN_DAY // 2, since, True)  == (Plan.Month, 1)

    with pytest.raises(session_broker.BrokerError):
        _ = session_broker.plan_for_expiry(since - base.MILLISECONDS_IN_DAY * 5, since, False)

def test_broker_ws_user_from_json():
    user = session_broker.ws_user_from_json({'user_id':             1234,
                                             'session_auth_hash':   '1234:4:1:a:b',
                                             'status':              3,
                                             'is_premium':          1,
                                             'traffic_used':        True,
                                             'premium_expiry_date': '2025-03-01'})
    assert user.user_id      == '1234'
    assert user.is_premium
    assert user.traffic_used == -1
    assert user.expiry_unix_ts_ms == 1740787200000
    assert session_broker.status_of(user, 0) == EntitlementStatus.Banned

    user.status = 1
    assert session_broker.status_of(user, 1740787200000 - 1000) == EntitlementStatus.Valid
    assert session_broker.status_of(user, 1740787200000 + base.MILLISECONDS_IN_DAY * 2) == EntitlementStatus.Expired
    assert session_broker.status_of(None, 0) == EntitlementStatus.Unknown

def test_broker_get_or_create_entitlement(monkeypatch):
    fake = FakeSessionAPI()
    fake.install(monkeypatch)

    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    gateway_env = make_env()
    ctx         = env.ExecCtx(env=gateway_env, test=True)
    cid         = make_cid()
    expiry      = base.now_unix_ts_ms() + base.MILLISECONDS_IN_DAY * 25
    assert backend.insert_client_if_absent(db.sql_conn, cid, None, base.ClientKind.Play, base.now_unix_ts_ms()).success

    if 1: # First call provisions a session and stores it encrypted
        ent = session_broker.get_or_create_entitlement(ctx, db.sql_conn, cid, expiry, 'month')
        assert ent.status == EntitlementStatus.Valid
        assert ent.expiry_unix_ts_ms >= expiry - base.MILLISECONDS_IN_DAY
        assert len(fake.created) == 1 and ent.sessiontoken == fake.created[0]

        row = backend.get_credential(db.sql_conn, cid)
        assert row is not None
        assert row.sessiontoken != ent.sessiontoken
        assert cipher.decrypt_from_storage(gateway_env, cid, row.userid, cipher.SESSIONTOKEN_AAD, row.sessiontoken) == ent.sessiontoken

    if 1: # Repeating it returns the same session without provisioning
        again = session_broker.get_or_create_entitlement(ctx, db.sql_conn, cid, expiry, 'month')
        assert again.sessiontoken == ent.sessiontoken
        assert len(fake.created) == 1 and len(fake.updates) == 0

    if 1: # A longer purchase extends the existing session forward
        longer = session_broker.get_or_create_entitlement(ctx, db.sql_conn, cid, base.add_months_to_unix_ts_ms(expiry, 3), 'month')
        assert longer.sessiontoken == ent.sessiontoken
        assert len(fake.updates) > 0
        assert longer.expiry_unix_ts_ms > ent.expiry_unix_ts_ms

    if 1: # The entitlement is handed to clients encrypted under their own key
        payload = developer_payload_ws(gateway_env, ent.developer_payload(gateway_env))
        assert payload['cid']          == cid
        assert payload['sessiontoken'] == ent.sessiontoken
        assert payload['status']       == 'valid'
        assert payload['test']         is True

    if 1: # Deleting removes the session upstream and the row
        session_broker.delete_entitlement(ctx, db.sql_conn, cid)
        assert fake.deleted == [ent.sessiontoken]
        assert backend.get_credential(db.sql_conn, cid) is None

        # NOTE: Nothing to delete is not an error
        session_broker.delete_entitlement(ctx, db.sql_conn, cid)
        assert len(fake.deleted) == 1
    db.sql_conn.close()

def test_broker_insert_race_deletes_orphaned_session(monkeypatch):
    fake = FakeSessionAPI()
    fake.install(monkeypatch)

    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    ctx    = env.ExecCtx(env=make_env(), test=False)
    cid    = make_cid()
    expiry = base.now_unix_ts_ms() + base.MILLISECONDS_IN_DAY * 20
    assert backend.insert_client_if_absent(db.sql_conn, cid, None, base.ClientKind.Play, base.now_unix_ts_ms()).success

    winner: list[session_broker.WSUser] = []
    def create_user_losing_race(ctx: env.ExecCtx, plan: Plan) -> session_broker.WSUser:
        # NOTE: Another request stores its credential while ours is being provisioned
        user      = fake.create_user(ctx, plan)
        enc_token = cipher.encrypt_for_storage(ctx.env, cid, user.user_id, cipher.SESSIONTOKEN_AAD, user.session_auth_hash)
        assert enc_token is not None
        assert backend.insert_credential(db.sql_conn, cid, user.user_id, enc_token, base.now_unix_ts_ms()).success
        winner.append(user)
        return fake.create_user(ctx, plan)

    monkeypatch.setattr("session_broker.ws_create_user", create_user_losing_race)

    ent = session_broker.get_or_create_entitlement(ctx, db.sql_conn, cid, expiry, 'month')
    assert ent.sessiontoken == winner[0].session_auth_hash
    assert fake.deleted     == [fake.created[1]]

    row = backend.get_credential(db.sql_conn, cid)
    assert row is not None and row.userid == winner[0].user_id
    db.sql_conn.close()

def test_broker_credentials_before_aad_cutover_and_invalid_sessions(monkeypatch):
    fake = FakeSessionAPI()
    fake.install(monkeypatch)

    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    gateway_env                        = make_env()
    now                                = base.now_unix_ts_ms()
    gateway_env.aad_cutover_unix_ts_ms = now
    ctx                                = env.ExecCtx(env=gateway_env)
    cid                                = make_cid()
    assert backend.insert_client_if_absent(db.sql_conn, cid, None, base.ClientKind.Play, now).success

    # NOTE: Rows written before the cutover carry no AAD
    user      = fake.create_user(ctx, Plan.Month)
    enc_token = cipher.encrypt_for_storage(gateway_env, cid, user.user_id, None, user.session_auth_hash)
    assert enc_token is not None
    assert backend.insert_credential(db.sql_conn, cid, user.user_id, enc_token, now - 1000).success

    ent = session_broker.creds(ctx, db.sql_conn, cid)
    assert ent is not None and ent.sessiontoken == user.session_auth_hash and ent.status == EntitlementStatus.Valid

    # NOTE: A session the third party no longer knows is dropped
    _   = fake.users.pop(user.session_auth_hash)
    ent = session_broker.creds(ctx, db.sql_conn, cid)
    assert ent is None
    assert backend.get_credential(db.sql_conn, cid) is None
    db.sql_conn.close()

def test_broker_failed_extension_deletes_new_session(monkeypatch):
    fake              = FakeSessionAPI()
    fake.fail_updates = True
    fake.install(monkeypatch)

    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    ctx    = env.ExecCtx(env=make_env())
    cid    = make_cid()
    expiry = base.add_months_to_unix_ts_ms(base.now_unix_ts_ms(), 4)
    assert backend.insert_client_if_absent(db.sql_conn, cid, None, base.ClientKind.Play, base.now_unix_ts_ms()).success

    with pytest.raises(session_broker.BrokerError):
        _ = session_broker.get_or_create_entitlement(ctx, db.sql_conn, cid, expiry, 'month')
    assert fake.deleted == fake.created
    assert backend.get_credential(db.sql_conn, cid) is None
    db.sql_conn.close()

def test_broker_banned_user_is_not_deleted(monkeypatch):
    fake             = FakeSessionAPI()
    fake.user_status = session_broker.WS_STATUS_BANNED
    fake.install(monkeypatch)

    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    ctx    = env.ExecCtx(env=make_env())
    cid    = make_cid()
    expiry = base.now_unix_ts_ms() + base.MILLISECONDS_IN_DAY * 25
    assert backend.insert_client_if_absent(db.sql_conn, cid, None, base.ClientKind.Play, base.now_unix_ts_ms()).success

    ent = session_broker.get_or_create_entitlement(ctx, db.sql_conn, cid, expiry, 'month')
    assert ent.status == EntitlementStatus.Banned

    with pytest.raises(session_broker.BrokerError):
        session_broker.delete_entitlement(ctx, db.sql_conn, cid)
    assert len(fake.deleted) == 0
    assert backend.get_credential(db.sql_conn, cid) is not None
    db.sql_conn.close()

def test_google_timestamp_parser():
    err = base.ErrorSink()
    ts  = GoogleTimestamp('2025-08-01T00:00:00.123Z', err)
    assert not err.has()
    assert ts.unix_milliseconds == 1754006400123

    ts = GoogleTimestamp('2025-08-01T05:30:00+05:30', err)
    assert not err.has()
    assert ts.unix_milliseconds == 1754006400000

    _ = GoogleTimestamp('yesterday', err)
    assert err.has()

class FakePublisherService:
    """
    Stands in for the androidpublisher discovery client. Resource accessors chain, a method called
    with arguments is recorded under its dotted path and returns a request whose `execute()` serves
    the canned response (or raises the canned error) for that path.
    """
    def __init__(self, path: str = '', calls: list[tuple[str, dict[str, typing.Any]]] | None = None, responses: dict[str, typing.Any] | None = None, errors: dict[str, Exception] | None = None):
        self.path      = path
        self.calls     = calls     if calls     is not None else []
        self.responses = responses if responses is not None else {}
        self.errors    = errors    if errors    is not None else {}

    def __getattr__(self, name: str):
        path = f'{self.path}.{name}' if self.path else name
        def call(**kwargs):
            if len(kwargs) == 0:
                return FakePublisherService(path, self.calls, self.responses, self.errors)
            self.calls.append((path, kwargs))
            return FakePublisherRequest(response=self.responses.get(path), error=self.errors.get(path))
        return call

@dataclasses.dataclass
class FakePublisherRequest:
    response: typing.Any       = None
    error:    Exception | None = None

    def execute(self) -> typing.Any:
        if self.error is not None:
            raise self.error
        return self.response

def test_google_api_requests_and_errors(monkeypatch):
    now     = base.now_unix_ts_ms()
    cid     = make_cid()
    service = FakePublisherService()
    monkeypatch.setattr("platform_google_api.publisher_service", service)
    monkeypatch.setattr("platform_google_api.package_name",      'com.celzero.bravedns')

    if 1: # Reads go through purchases.subscriptionsv2.get and are parsed
        service.responses['purchases.subscriptionsv2.get'] = google_subscription_json(cid, now, now + base.MILLISECONDS_IN_DAY)
        err = base.ErrorSink()
        sub = platform_google_api.get_subscription_v2('tok-1', err)
        assert not err.has(), err.build()
        assert sub is not None and sub.obfuscated_external_account_id == cid
        assert service.calls[-1] == ('purchases.subscriptionsv2.get', {'packageName': 'com.celzero.bravedns', 'token': 'tok-1'})

    if 1: # Writes name the subscription or product being acted on
        platform_google_api.acknowledge_subscription(STANDARD_PRODUCT_ID, 'tok-1', 'payload')
        assert service.calls[-1] == ('purchases.subscriptions.acknowledge', {'packageName':    'com.celzero.bravedns',
                                                                             'subscriptionId': STANDARD_PRODUCT_ID,
                                                                             'token':          'tok-1',
                                                                             'body':           {'developerPayload': 'payload'}})
        platform_google_api.cancel_subscription(STANDARD_PRODUCT_ID, 'tok-1')
        assert service.calls[-1] == ('purchases.subscriptions.cancel', {'packageName': 'com.celzero.bravedns', 'subscriptionId': STANDARD_PRODUCT_ID, 'token': 'tok-1'})

        platform_google_api.refund_order('GPA.1')
        assert service.calls[-1] == ('orders.refund', {'packageName': 'com.celzero.bravedns', 'orderId': 'GPA.1', 'revoke': True})

    if 1: # HTTP failures surface as GoogleAPIError with the status and Google's message
        resp    = types.SimpleNamespace(status=404, reason='Not Found')
        content = json.dumps({'error': {'code': 404, 'message': 'The purchase token was not found'}}).encode('utf-8')
        service.errors['purchases.subscriptionsv2.revoke'] = googleapiclient.errors.HttpError(resp, content)
        with pytest.raises(GoogleAPIError) as e:
            platform_google_api.revoke_subscription('tok-gone')
        assert e.value.status == 404 and e.value.details == 'The purchase token was not found'
        assert service.calls[-1][1]['body'] == {'revocationContext': {'fullRefund': {}}}

    if 1: # Without a service account nothing is sent
        monkeypatch.setattr("platform_google_api.publisher_service", None)
        with pytest.raises(base.ConfigError):
            _ = platform_google_api.get_product_v2('otp-1', base.ErrorSink())

def test_google_subscription_info_and_refund_window():
    now   = base.now_unix_ts_ms()
    start = now - base.MILLISECONDS_IN_DAY * 2

    err = base.ErrorSink()
    sub = platform_google_api.parse_subscription_v2(google_subscription_json(make_cid(), start, now + base.MILLISECONDS_IN_DAY * 25), err)
    assert not err.has() and sub is not None
    assert sub.test_purchase and not sub.acknowledged

    intent = platform_google.subscription_info(sub)
    assert intent is not None
    assert intent.plan             == 'month'
    assert intent.start_unix_ts_ms == start
    assert intent.within_refund_window(now)

    # NOTE: Monthly plans can be refunded for 3 days, yearly for 7
    assert not intent.within_refund_window(start + base.MILLISECONDS_IN_DAY * 4)
    yearly = EntitlementIntent(STANDARD_PRODUCT_ID, YEARLY_BASE_PLAN_ID, start, now)
    assert yearly.plan == 'year' and yearly.within_refund_window(start + base.MILLISECONDS_IN_DAY * 4)

    # NOTE: Deferred items have no expiry and are skipped
    deferred = SubscriptionV2DataLineItem(product_id=STANDARD_PRODUCT_ID, base_plan_id=YEARLY_BASE_PLAN_ID)
    sub.line_items.insert(0, deferred)
    intent = platform_google.subscription_info(sub)
    assert intent is not None and intent.base_plan_id == MONTHLY_BASE_PLAN_ID

    sub.line_items[1].base_plan_id = 'proxy-weekly'
    assert platform_google.subscription_info(sub) is None

    sub.line_items = []
    with pytest.raises(ValueError):
        _ = platform_google.subscription_info(sub)

def test_google_onetime_plan():
    completion = base.now_unix_ts_ms() - base.MILLISECONDS_IN_DAY
    err        = base.ErrorSink()
    purchase   = platform_google_api.parse_product_v2(google_product_json(make_cid(), completion), err)
    assert not err.has() and purchase is not None
    assert purchase.paid and purchase.test_purchase and not purchase.acknowledged

    intent = platform_google.onetime_plan(purchase)
    assert intent is not None
    assert intent.plan              == 'year'
    assert intent.expiry_unix_ts_ms == base.add_months_to_unix_ts_ms(completion, 24)
    assert intent.refund_window_days == 14

    purchase.line_items[0].purchase_option_id = 'proxy-lifetime'
    assert platform_google.onetime_plan(purchase) is None

def test_google_resolve_cid_follows_linked_purchases(monkeypatch):
    play = FakePlayAPI()
    play.install(monkeypatch)

    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    now    = base.now_unix_ts_ms()
    cid    = make_cid()
    ctx    = env.ExecCtx(env=make_env(), test=True)
    expiry = now + base.MILLISECONDS_IN_DAY * 25

    play.subscriptions['tok-1'] = google_subscription_json(cid, now, expiry)
    play.subscriptions['tok-2'] = google_subscription_json('', now, expiry, linked_purchase_token='tok-1')
    play.subscriptions['tok-3'] = google_subscription_json('', now, expiry, linked_purchase_token='tok-2')

    if 1: # The cid is found on the purchase that was replaced
        sub = platform_google.fetch_subscription('tok-3')
        assert platform_google.resolve_cid(ctx, db.sql_conn, sub, gen=False, persist=True) == cid
        client = backend.get_client(db.sql_conn, cid)
        assert client is not None and client.kind == base.ClientKind.Play

    if 1: # A loop in the chain is not followed forever
        play.subscriptions['loop-a'] = google_subscription_json('', now, expiry, linked_purchase_token='loop-b')
        play.subscriptions['loop-b'] = google_subscription_json('', now, expiry, linked_purchase_token='loop-a')
        sub = platform_google.fetch_subscription('loop-a')
        with pytest.raises(platform_google.CidError):
            _ = platform_google.resolve_cid(ctx, db.sql_conn, sub, gen=False, persist=True)

        generated = platform_google.resolve_cid(ctx, db.sql_conn, sub, gen=True, persist=True)
        assert platform_google.is_valid_cid(generated) and len(generated) == 64
        client = backend.get_client(db.sql_conn, generated)
        assert client is not None and client.kind == base.ClientKind.Generated

    if 1: # A short identifier is not followed to the linked purchase
        play.subscriptions['short'] = google_subscription_json('abc', now, expiry, linked_purchase_token='tok-1')
        sub = platform_google.fetch_subscription('short')
        with pytest.raises(platform_google.CidError):
            _ = platform_google.resolve_cid(ctx, db.sql_conn, sub, gen=False, persist=False)
    db.sql_conn.close()

def test_google_voided_purchase_is_logged_by_name(monkeypatch):
    infos:  list[str] = []
    errors: list[str] = []
    monkeypatch.setattr(platform_google.log, 'info',  lambda msg, *args, **kwargs: infos.append(msg))
    monkeypatch.setattr(platform_google.log, 'error', lambda msg, *args, **kwargs: errors.append(msg))

    platform_google.handle_voided_notification('tok-1', 'GPA.1', 1, 1)
    assert len(infos) == 1 and infos[0].endswith('SUBSCRIPTION FULL_REFUND')

    # NOTE: Partial refunds and unknown product types need a human to look at them
    platform_google.handle_voided_notification('tok-2', 'GPA.2', 7, 2)
    assert len(errors) == 1 and errors[0].endswith('UNKNOWN_7 QUANTITY_BASED_PARTIAL_REFUND')

def test_google_push_envelope():
    err  = base.ErrorSink()
    body = {'version': '1.0', 'packageName': 'com.celzero.bravedns'}
    envelope = {'message': {'data': base64.b64encode(json.dumps(body).encode('utf-8')).decode('ascii'), 'messageId': '1'},
                'subscription': 'projects/rethink/subscriptions/rtdn'}
    assert platform_google.decode_push_envelope(envelope, err) == body
    assert not err.has()

    for bad in ({}, [], {'message': {}}, {'message': {'data': '!!!'}}, {'message': {'data': base64.b64encode(b'[1]').decode('ascii')}}):
        err = base.ErrorSink()
        assert platform_google.decode_push_envelope(bad, err) is None
        assert err.has()

def test_google_platform_handle_notification(monkeypatch):
    play    = FakePlayAPI()
    session = FakeSessionAPI()
    play.install(monkeypatch)
    session.install(monkeypatch)

    with TestingContext(db_path='file:test_platform_google_db?mode=memory&cache=shared', uri=True) as ctx:
        now    = base.now_unix_ts_ms()
        cid    = make_cid()
        start  = now - base.MILLISECONDS_IN_DAY
        expiry = now + base.MILLISECONDS_IN_DAY * 25

        def notify(body: base.JSONObject) -> platform_google.GoogleHandleNotificationResult:
            err    = base.ErrorSink()
            result = platform_google.handle_notification(body, ctx.sql_conn, ctx.gateway_env, err)
            assert not err.has(), err.build()
            assert result.ack
            return result

        if 1: # New subscription is entitled and acknowledged with the entitlement
            play.subscriptions['tok-1'] = google_subscription_json(cid, start, expiry)
            result = notify(rtdn_subscription('tok-1', 4))
            assert result.purchase_token == 'tok-1'

            assert len(session.created) == 1
            assert len(play.sub_acks)   == 1 and play.sub_acks[0][0] == 'tok-1'
            payload = developer_payload_ws(ctx.gateway_env, play.sub_acks[0][1])
            assert payload['cid']          == cid
            assert payload['sessiontoken'] == session.created[0]

            row = backend.get_credential(ctx.sql_conn, cid)
            assert row is not None and row.purchasetoken == 'tok-1'
            order = backend.get_playorder(ctx.sql_conn, 'tok-1')
            assert order is not None and order.cid == cid

        if 1: # Redelivery of an acknowledged purchase is a no-op
            play.subscriptions['tok-1']['acknowledgementState'] = 'ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED'
            _ = notify(rtdn_subscription('tok-1', 2))
            assert len(session.created) == 1
            assert len(play.sub_acks)   == 1

        if 1: # Upgrade, the replaced purchase is acknowledged without an entitlement
            play.subscriptions['tok-2'] = google_subscription_json(cid, now, expiry, linked_purchase_token='tok-1')
            _ = notify(rtdn_subscription('tok-2', 4))
            assert len(session.created) == 1
            assert play.sub_acks[-1][0] == 'tok-2'

            play.subscriptions['tok-1'] = google_subscription_json(cid, start, now - 1000, state='SUBSCRIPTION_STATE_EXPIRED', auto_renew=False, replaced=True)
            _ = notify(rtdn_subscription('tok-1', 13))
            assert play.sub_acks[-1] == ('tok-1', None)
            assert backend.get_credential(ctx.sql_conn, cid) is not None

        if 1: # Cancelled but not expired keeps the entitlement
            play.subscriptions['tok-2'] = google_subscription_json(cid, now, expiry, state='SUBSCRIPTION_STATE_CANCELED', ack='ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED', auto_renew=False)
            _ = notify(rtdn_subscription('tok-2', 3))
            assert len(session.deleted) == 0
            assert backend.get_credential(ctx.sql_conn, cid) is not None

        if 1: # Revocation deletes the entitlement
            play.subscriptions['tok-2'] = google_subscription_json(cid, now, now, state='SUBSCRIPTION_STATE_EXPIRED', ack='ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED', auto_renew=False)
            _ = notify(rtdn_subscription('tok-2', 12))
            assert session.deleted == [session.created[0]]
            assert backend.get_credential(ctx.sql_conn, cid) is None

        if 1: # Test notifications and voided purchases are only logged
            _ = notify({'version': '1.0', 'packageName': 'com.celzero.bravedns', 'eventTimeMillis': str(now), 'testNotification': {'version': '1.0'}})
            _ = notify({'version': '1.0', 'packageName': 'com.celzero.bravedns', 'eventTimeMillis': str(now),
                        'voidedPurchaseNotification': {'purchaseToken': 'tok-2', 'orderId': 'GPA.1', 'productType': 1, 'refundType': 1}})

        if 1: # Malformed notifications are rejected
            for body in ({'version': '1.0', 'packageName': 'com.example', 'eventTimeMillis': str(now), 'testNotification': {}},
                         {'version': '1.0', 'packageName': 'com.celzero.bravedns', 'eventTimeMillis': str(now)},
                         {'version': '1.0', 'packageName': 'com.celzero.bravedns', 'eventTimeMillis': str(now), 'testNotification': {},
                          'subscriptionNotification': {'purchaseToken': 'tok-1', 'notificationType': 4}}):
                err    = base.ErrorSink()
                result = platform_google.handle_notification(body, ctx.sql_conn, ctx.gateway_env, err)
                assert err.has() and not result.ack

def test_google_platform_revocation_deletes_entitlement_once(monkeypatch):
    play    = FakePlayAPI()
    session = FakeSessionAPI()
    play.install(monkeypatch)
    session.install(monkeypatch)

    sleeps: list[float] = []
    monkeypatch.setattr("time.sleep", lambda delay_s: sleeps.append(delay_s))

    with TestingContext(db_path='file:test_platform_google_revoke_once_db?mode=memory&cache=shared', uri=True) as ctx:
        now    = base.now_unix_ts_ms()
        cid    = make_cid()
        expiry = now + base.MILLISECONDS_IN_DAY * 25

        play.subscriptions['tok-1'] = google_subscription_json(cid, now, expiry)
        err    = base.ErrorSink()
        result = platform_google.handle_notification(rtdn_subscription('tok-1', 4), ctx.sql_conn, ctx.gateway_env, err)
        assert not err.has() and result.ack
        assert backend.get_credential(ctx.sql_conn, cid) is not None

        # NOTE: A revoked purchase carrying an add-on, both line items map onto the one entitlement
        sub       = google_subscription_json(cid, now, now, state='SUBSCRIPTION_STATE_EXPIRED', ack='ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED', auto_renew=False)
        line_item = dict(sub['lineItems'][0])
        line_item['productId'] = 'proxy_addon'
        sub['lineItems'].append(line_item)
        play.subscriptions['tok-1'] = sub

        err    = base.ErrorSink()
        result = platform_google.handle_notification(rtdn_subscription('tok-1', 12), ctx.sql_conn, ctx.gateway_env, err)
        assert not err.has() and result.ack
        assert session.deleted == [session.created[0]]
        assert sleeps == [platform_google.REVOKE_BACKOFF_S[0]]
        assert backend.get_credential(ctx.sql_conn, cid) is None

def test_google_platform_purchase_without_cid_gets_generated_cid(monkeypatch):
    play    = FakePlayAPI()
    session = FakeSessionAPI()
    play.install(monkeypatch)
    session.install(monkeypatch)

    with TestingContext(db_path='file:test_platform_google_gen_cid_db?mode=memory&cache=shared', uri=True) as ctx:
        now = base.now_unix_ts_ms()
        play.subscriptions['tok-1'] = google_subscription_json('', now, now + base.MILLISECONDS_IN_DAY * 25)

        err    = base.ErrorSink()
        result = platform_google.handle_notification(rtdn_subscription('tok-1', 4), ctx.sql_conn, ctx.gateway_env, err)
        assert not err.has() and result.ack

        order = backend.get_playorder(ctx.sql_conn, 'tok-1')
        assert order is not None
        client = backend.get_client(ctx.sql_conn, order.cid)
        assert client is not None and client.kind == base.ClientKind.Generated
        assert developer_payload_ws(ctx.gateway_env, play.sub_acks[0][1])['cid'] == order.cid

def test_google_platform_banned_user_is_not_acknowledged(monkeypatch):
    play             = FakePlayAPI()
    session          = FakeSessionAPI()
    session.user_status = session_broker.WS_STATUS_BANNED
    play.install(monkeypatch)
    session.install(monkeypatch)

    with TestingContext(db_path='file:test_platform_google_banned_db?mode=memory&cache=shared', uri=True) as ctx:
        now = base.now_unix_ts_ms()
        play.subscriptions['tok-1'] = google_subscription_json(make_cid(), now, now + base.MILLISECONDS_IN_DAY * 25)

        err    = base.ErrorSink()
        result = platform_google.handle_notification(rtdn_subscription('tok-1', 4), ctx.sql_conn, ctx.gateway_env, err)
        assert not err.has() and result.ack
        assert len(session.created) == 1
        assert len(play.sub_acks)   == 0

def test_google_platform_onetime_notification(monkeypatch):
    play    = FakePlayAPI()
    session = FakeSessionAPI()
    play.install(monkeypatch)
    session.install(monkeypatch)

    with TestingContext(db_path='file:test_platform_google_onetime_db?mode=memory&cache=shared', uri=True) as ctx:
        now        = base.now_unix_ts_ms()
        cid        = make_cid()
        completion = now - base.MILLISECONDS_IN_DAY

        if 1: # Pending payments are recorded but not entitled
            play.products['otp-1'] = google_product_json(cid, completion, state='PENDING')
            err = base.ErrorSink()
            _   = platform_google.handle_notification(rtdn_onetime('otp-1', 1), ctx.sql_conn, ctx.gateway_env, err)
            assert not err.has()
            assert backend.get_playorder(ctx.sql_conn, 'otp-1') is not None
            assert len(session.created) == 0 and len(play.product_acks) == 0

        if 1: # Paid, entitled for two years and acknowledged under the notified product
            play.products['otp-1'] = google_product_json(cid, completion)
            err = base.ErrorSink()
            _   = platform_google.handle_notification(rtdn_onetime('otp-1', 1), ctx.sql_conn, ctx.gateway_env, err)
            assert not err.has()
            assert len(play.product_acks) == 1
            product_id, purchase_token, payload = play.product_acks[0]
            assert product_id == ONETIME_PRODUCT_ID and purchase_token == 'otp-1'

            ws = developer_payload_ws(ctx.gateway_env, payload)
            assert ws['cid'] == cid
            ent = session_broker.creds(env.ExecCtx(env=ctx.gateway_env, test=True), ctx.sql_conn, cid)
            assert ent is not None
            assert ent.expiry_unix_ts_ms >= base.add_months_to_unix_ts_ms(completion, 24) - base.MILLISECONDS_IN_DAY

        if 1: # Unknown products are ignored
            err = base.ErrorSink()
            _   = platform_google.handle_notification(rtdn_onetime('otp-2', 1, sku='coins.100'), ctx.sql_conn, ctx.gateway_env, err)
            assert not err.has()
            assert backend.get_playorder(ctx.sql_conn, 'otp-2') is None

        if 1: # Cancellation deletes the entitlement
            err = base.ErrorSink()
            _   = platform_google.handle_notification(rtdn_onetime('otp-1', 2), ctx.sql_conn, ctx.gateway_env, err)
            assert not err.has()
            assert backend.get_credential(ctx.sql_conn, cid) is None
            assert len(session.deleted) == 1

def test_server_google_rtdn(monkeypatch):
    play    = FakePlayAPI()
    session = FakeSessionAPI()
    play.install(monkeypatch)
    session.install(monkeypatch)

    def envelope(body: base.JSONObject) -> base.JSONObject:
        result: base.JSONObject = {
            'message':      {'data': base64.b64encode(json.dumps(body).encode('utf-8')).decode('ascii'), 'messageId': '17064522705211191'},
            'subscription': 'projects/rethink/subscriptions/rtdn',
        }
        return result

    with TestingContext(db_path='file:test_server_rtdn_db?mode=memory&cache=shared', uri=True) as ctx:
        now = base.now_unix_ts_ms()
        cid = make_cid()
        play.subscriptions['tok-1'] = google_subscription_json(cid, now, now + base.MILLISECONDS_IN_DAY * 25)

        response = ctx.flask_client.post(server.ROUTE_GOOGLE_RTDN, json=envelope(rtdn_subscription('tok-1', 4)))
        assert response.status_code == 200 and response.data == b'OK'
        assert backend.get_credential(ctx.sql_conn, cid) is not None
        assert len(play.sub_acks) == 1

        # NOTE: Provider failures answer with a 5xx so that Pub/Sub redelivers
        response = ctx.flask_client.post(server.ROUTE_GOOGLE_RTDN, json=envelope(rtdn_subscription('tok-unknown', 4)))
        assert response.status_code == 500

        response = ctx.flask_client.post(server.ROUTE_GOOGLE_RTDN, json={'message': {'data': 'not base64!'}})
        assert response.status_code == 400

        response = ctx.flask_client.post(server.ROUTE_GOOGLE_RTDN, data=b'{')
        assert response.status_code == 400

        response = ctx.flask_client.post(server.ROUTE_GOOGLE_RTDN, json=envelope({'version': '1.0', 'packageName': 'com.example', 'eventTimeMillis': str(now), 'testNotification': {}}))
        assert response.status_code == 400

def test_server_google_ack(monkeypatch):
    play    = FakePlayAPI()
    session = FakeSessionAPI()
    play.install(monkeypatch)
    session.install(monkeypatch)

    with TestingContext(db_path='file:test_server_ack_db?mode=memory&cache=shared', uri=True) as ctx:
        now    = base.now_unix_ts_ms()
        cid    = make_cid()
        expiry = now + base.MILLISECONDS_IN_DAY * 25
        play.subscriptions['tok-1'] = google_subscription_json(cid, now, expiry)

        def ack(purchase_token: str, client_id: str, sku: str = STANDARD_PRODUCT_ID) -> tuple[int, typing.Any]:
            response = ctx.flask_client.post(f'{server.ROUTE_GOOGLE_ACK}?purchaseToken={purchase_token}&cid={client_id}&sku={sku}')
            return response.status_code, response.json

        if 1: # Owner gets its entitlement and the purchase is acknowledged
            status, body = ack('tok-1', cid)
            assert status == 200, body
            assert body['success'] and body['cid'] == cid and body['productId'] == STANDARD_PRODUCT_ID
            assert body['purchaseId'] == base.purchase_id('tok-1')
            assert developer_payload_ws(ctx.gateway_env, body['developerPayload'])['sessiontoken'] == session.created[0]
            assert len(play.sub_acks) == 1

        if 1: # Repeating it hands out the same entitlement without re-acknowledging
            play.subscriptions['tok-1']['acknowledgementState'] = 'ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED'
            status, body = ack('tok-1', cid)
            assert status == 200, body
            assert developer_payload_ws(ctx.gateway_env, body['developerPayload'])['sessiontoken'] == session.created[0]
            assert len(play.sub_acks) == 1 and len(session.created) == 1

        if 1: # Someone else's purchase
            status, body = ack('tok-1', make_cid())
            assert status == 400 and 'not registered with purchase token' in body['error']

        if 1: # Purchases that don't carry a cid can't be claimed
            play.subscriptions['tok-2'] = google_subscription_json('', now, expiry)
            status, body = ack('tok-2', cid)
            assert status == 400 and body['error'] == 'cid validation failed'

        if 1: # Not active
            play.subscriptions['tok-3'] = google_subscription_json(cid, now, now, state='SUBSCRIPTION_STATE_EXPIRED')
            status, body = ack('tok-3', cid)
            assert status == 400 and body['error'] == 'subscription not active'

        if 1: # Malformed requests
            status, body = ack('', cid)
            assert status == 400 and body['error'] == 'missing purchase token'
            status, body = ack('tok-1', 'not-a-cid')
            assert status == 400 and body['error'] == 'missing/invalid client id'
            status, body = ack('otp-unknown', cid, sku=ONETIME_PRODUCT_ID)
            assert status == 500 and body['error'] == 'acknowledge failed'

        if 1: # Entitlements can't be read back outside the testing environment, whatever the query says
            for query in (f'cid={cid}', f'cid={cid}&test=1', f'cid={cid}&test=true'):
                response = ctx.flask_client.get(f'{server.ROUTE_GOOGLE_ENTITLEMENT}?{query}')
                assert response.status_code == 400 and response.json is not None and response.json['error'] == 'test api'

        if 1: # Deployments running in the testing environment serve them
            monkeypatch.setattr("base.PLATFORM_TESTING_ENV", True)
            response = ctx.flask_client.get(f'{server.ROUTE_GOOGLE_ENTITLEMENT}?cid={cid}')
            assert response.status_code == 200
            assert response.json is not None and response.json['cid'] == cid

            response = ctx.flask_client.get(f'{server.ROUTE_GOOGLE_ENTITLEMENT}?cid={make_cid()}')
            assert response.status_code == 400 and response.json is not None and response.json['error'] == 'entitlement not found'

def test_server_google_cancel_and_revoke(monkeypatch):
    play    = FakePlayAPI()
    session = FakeSessionAPI()
    play.install(monkeypatch)
    session.install(monkeypatch)

    with TestingContext(db_path='file:test_server_cancel_revoke_db?mode=memory&cache=shared', uri=True) as ctx:
        now    = base.now_unix_ts_ms()
        cid    = make_cid()
        expiry = now + base.MILLISECONDS_IN_DAY * 25
        assert backend.insert_client_if_absent(ctx.sql_conn, cid, None, base.ClientKind.Play, now).success

        def on_file(purchase_token: str, purchase: base.JSONObject):
            play.subscriptions[purchase_token] = purchase
            assert backend.upsert_playorder(ctx.sql_conn, cid, purchase_token, None, json.dumps(purchase), now).success

        def post(route: str, purchase_token: str, client_id: str, sku: str = STANDARD_PRODUCT_ID) -> tuple[int, typing.Any]:
            response = ctx.flask_client.post(f'{route}?purchaseToken={purchase_token}&cid={client_id}&sku={sku}')
            return response.status_code, response.json

        if 1: # Stop renewing
            on_file('tok-stop', google_subscription_json(cid, now - base.MILLISECONDS_IN_DAY * 20, expiry))
            status, body = post(server.ROUTE_GOOGLE_STOP, 'tok-stop', cid)
            assert status == 200 and body['success'], body
            assert play.cancelled == ['tok-stop']

            status, body = post(server.ROUTE_GOOGLE_STOP, 'tok-stop', make_cid())
            assert status == 400 and body['error'] == 'cannot cancel, cid mismatch'
            status, body = post(server.ROUTE_GOOGLE_STOP, 'tok-unknown', cid)
            assert status == 400 and body['error'] == 'subscription not found'
            assert play.cancelled == ['tok-stop']

        if 1: # Already cancelled
            on_file('tok-cancelled', google_subscription_json(cid, now, expiry, state='SUBSCRIPTION_STATE_CANCELED', auto_renew=False))
            status, body = post(server.ROUTE_GOOGLE_STOP, 'tok-cancelled', cid)
            assert status == 200 and body['success'] is False and body['cancelled'] is True
            assert play.cancelled == ['tok-stop']

        if 1: # Revoke within the monthly refund window (3 days)
            on_file('tok-day-2', google_subscription_json(cid, now - base.MILLISECONDS_IN_DAY * 2, expiry))
            status, body = post(server.ROUTE_GOOGLE_REFUND, 'tok-day-2', cid)
            assert status == 200 and body['success'] and body['hadEntitlement'], body
            assert play.revoked == ['tok-day-2']

        if 1: # And outside of it
            on_file('tok-day-4', google_subscription_json(cid, now - base.MILLISECONDS_IN_DAY * 4, expiry))
            status, body = post(server.ROUTE_GOOGLE_REFUND, 'tok-day-4', cid)
            assert status == 400 and body['error'] == 'cannot revoke, sub too old, email hello@celzero.com'
            assert body['windowDays'] == 3
            assert play.revoked == ['tok-day-2']

        if 1: # The purchase on file must still look like the live one
            on_file('tok-swapped', google_subscription_json(cid, now, expiry))
            play.subscriptions['tok-swapped'] = google_subscription_json(make_cid(), now, expiry)
            status, body = post(server.ROUTE_GOOGLE_REFUND, 'tok-swapped', cid)
            assert status == 400 and body['error'] == 'cannot cancel, subscription mismatch'

        if 1: # One-time purchases are refunded within their window
            completion = now - base.MILLISECONDS_IN_DAY
            play.products['otp-1'] = google_product_json(cid, completion)
            assert backend.upsert_playorder(ctx.sql_conn, cid, 'otp-1', None, json.dumps(play.products['otp-1']), now).success
            status, body = post(server.ROUTE_GOOGLE_REFUND, 'otp-1', cid, sku=ONETIME_PRODUCT_ID)
            assert status == 200 and body['success'], body
            assert play.refunded == ['GPA.3312-0000-0000-00002']

            play.products['otp-2'] = google_product_json(cid, now - base.MILLISECONDS_IN_DAY * 20)
            assert backend.upsert_playorder(ctx.sql_conn, cid, 'otp-2', None, json.dumps(play.products['otp-2']), now).success
            status, body = post(server.ROUTE_GOOGLE_STOP, 'otp-2', cid, sku=ONETIME_PRODUCT_ID)
            assert status == 400 and body['error'] == 'refund window exceeded'
            assert len(play.refunded) == 1

        if 1: # One-time monthly purchases have a 3 day window
            for purchase_token, days_ago in (('otp-day-2', 2), ('otp-day-4', 4)):
                play.products[purchase_token] = google_product_json(cid, now - base.MILLISECONDS_IN_DAY * days_ago, purchase_option_id=MONTHLY_BASE_PLAN_ID)
                assert backend.upsert_playorder(ctx.sql_conn, cid, purchase_token, None, json.dumps(play.products[purchase_token]), now).success

            status, body = post(server.ROUTE_GOOGLE_REFUND, 'otp-day-2', cid, sku=ONETIME_PRODUCT_ID)
            assert status == 200 and body['success'], body
            assert len(play.refunded) == 2

            status, body = post(server.ROUTE_GOOGLE_REFUND, 'otp-day-4', cid, sku=ONETIME_PRODUCT_ID)
            assert status == 400 and body['error'] == 'refund window exceeded' and body['windowDays'] == 3
            assert len(play.refunded) == 2
            assert len(session.deleted) == 0

def test_server_stripe_checkout(monkeypatch):
    hmac_key  = b'k' * 32
    blind_msg = b'blinded-token-message'
    ref       = cipher.hmac_sign(hmac_key, blind_msg).hex()

    monkeypatch.setattr("stripe.WebhookSignature.verify_header", lambda *args, **kwargs: True)
    monkeypatch.setattr("platform_stripe.retrieve_session_with_line_items",
                        lambda gateway_env, sid: {'id': sid, 'line_items': {'data': [{'price': {'product': platform_stripe.PROXY_PRODUCT_ID}}]}})

    def checkout_event(sid:                 str,
                       client_reference_id: str | None,
                       event_type:          str = 'checkout.session.completed',
                       status:              str = 'complete',
                       payment_status:      str = 'paid') -> bytes:
        session: base.JSONObject = {'id': sid, 'object': 'checkout.session', 'status': status, 'payment_status': payment_status}
        if client_reference_id is not None:
            session['client_reference_id'] = client_reference_id
        result = json.dumps({'id': f'evt_{sid}', 'type': event_type, 'data': {'object': session}}).encode('utf-8')
        return result

    with TestingContext(db_path='file:test_server_stripe_db?mode=memory&cache=shared', uri=True) as ctx:
        headers = {'Stripe-Signature': 't=1700000000,v1=00'}

        if 1: # Paid checkout for the proxy product records a payee
            assert platform_stripe.payment_status_for(ctx.sql_conn, blind_msg, hmac_key) == platform_stripe.PaymentStatus.None_
            response = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=checkout_event('cs_1', ref), headers=headers)
            assert response.status_code == 200 and response.json == {'received': True}
            assert platform_stripe.payment_status_for(ctx.sql_conn, blind_msg, hmac_key) == platform_stripe.PaymentStatus.Paid

            payee = backend.get_latest_payee_by_ref(ctx.sql_conn, ref)
            assert payee is not None and payee.id == 'cs_1' and payee.prod == platform_stripe.PROXY_PRODUCT_ID
            order = backend.get_stripeorder(ctx.sql_conn, 'cs_1')
            assert order is not None and order.prod == platform_stripe.PROXY_PRODUCT_ID and order.cid is None

        if 1: # Payments older than 30 days no longer count
            old_ref = cipher.hmac_sign(hmac_key, b'paid-last-quarter').hex()
            assert backend.insert_payee(ctx.sql_conn, 'cs_old', old_ref, 'complete', 'paid', platform_stripe.PROXY_PRODUCT_ID, '{}',
                                        base.now_unix_ts_ms() - base.MILLISECONDS_IN_DAY * 31).success
            assert platform_stripe.payment_status_for(ctx.sql_conn, b'paid-last-quarter', hmac_key) == platform_stripe.PaymentStatus.Unpaid

        if 1: # Expired, failed or not yet settled checkouts never make their client a payee
            unpaid_msg = b'abandoned-checkout-message'
            unpaid_ref = cipher.hmac_sign(hmac_key, unpaid_msg).hex()
            for sid, event_type, status, payment_status in (('cs_exp',  'checkout.session.expired',              'expired',  'unpaid'),
                                                            ('cs_fail', 'checkout.session.async_payment_failed', 'complete', 'unpaid'),
                                                            ('cs_wait', 'checkout.session.completed',            'complete', 'unpaid')):
                event    = checkout_event(sid, unpaid_ref, event_type, status=status, payment_status=payment_status)
                response = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=event, headers=headers)
                assert response.status_code == 200 and response.json == {'received': True}
                assert backend.get_stripeorder(ctx.sql_conn, sid) is None

            assert backend.get_latest_payee_by_ref(ctx.sql_conn, unpaid_ref) is None
            assert platform_stripe.payment_status_for(ctx.sql_conn, unpaid_msg, hmac_key) == platform_stripe.PaymentStatus.None_

            # NOTE: Abandoned checkouts are set aside, the unpaid completion waits for its async payment
            rows = ctx.sql_conn.execute("SELECT id, reason FROM lapses WHERE id IN ('cs_exp', 'cs_fail', 'cs_wait') ORDER BY id").fetchall()
            assert rows == [('cs_exp', 'unsettled'), ('cs_fail', 'unsettled')]

        if 1: # An unpaid row on file is never reported as paid
            stale_ref = cipher.hmac_sign(hmac_key, b'stale-unpaid-row').hex()
            assert backend.insert_payee(ctx.sql_conn, 'cs_stale', stale_ref, 'expired', 'unpaid', platform_stripe.PROXY_PRODUCT_ID, '{}', base.now_unix_ts_ms()).success
            assert platform_stripe.payment_status_for(ctx.sql_conn, b'stale-unpaid-row', hmac_key) == platform_stripe.PaymentStatus.Unpaid

        if 1: # Checkouts that need no payment are fulfilled
            free_msg = b'coupon-checkout-message'
            event    = checkout_event('cs_free', cipher.hmac_sign(hmac_key, free_msg).hex(), payment_status='no_payment_required')
            response = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=event, headers=headers)
            assert response.status_code == 200 and response.json == {'received': True}
            assert platform_stripe.payment_status_for(ctx.sql_conn, free_msg, hmac_key) == platform_stripe.PaymentStatus.Paid

        if 1: # Stripe being unreachable asks for a redelivery
            def unreachable(gateway_env, sid):
                raise stripe.APIConnectionError('Connection reset by peer')
            monkeypatch.setattr("platform_stripe.retrieve_session_with_line_items", unreachable)
            retry_msg = b'retry-checkout-message'
            event     = checkout_event('cs_retry', cipher.hmac_sign(hmac_key, retry_msg).hex())
            response  = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=event, headers=headers)
            assert response.status_code == 200 and response.json == {'received': False}
            assert platform_stripe.payment_status_for(ctx.sql_conn, retry_msg, hmac_key) == platform_stripe.PaymentStatus.None_
            monkeypatch.setattr("platform_stripe.retrieve_session_with_line_items",
                                lambda gateway_env, sid: {'id': sid, 'line_items': {'data': [{'price': {'product': platform_stripe.PROXY_PRODUCT_ID}}]}})

        if 1: # Sessions with no client reference are recorded as lapses
            response = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=checkout_event('cs_2', None), headers=headers)
            assert response.status_code == 200 and response.json == {'received': True}
            rows = ctx.sql_conn.execute('SELECT reason FROM lapses WHERE id = ?', ('cs_2',)).fetchall()
            assert rows == [('missing-ref',)]

        if 1: # Unknown events are accepted and ignored
            response = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=checkout_event('cs_3', ref, 'invoice.paid'), headers=headers)
            assert response.status_code == 200 and response.json == {'received': True}

        if 1: # Bad signatures and bodies are rejected
            def reject(*args, **kwargs):
                raise stripe.SignatureVerificationError('No signatures found matching the expected signature for payload', 't=1,v1=00')
            monkeypatch.setattr("stripe.WebhookSignature.verify_header", reject)
            response = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=checkout_event('cs_4', ref), headers=headers)
            assert response.status_code == 400 and response.json == {'error': 'invalid signature'}

            monkeypatch.setattr("stripe.WebhookSignature.verify_header", lambda *args, **kwargs: True)
            response = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=b'not json', headers=headers)
            assert response.status_code == 400 and response.json == {'error': 'invalid payload'}

    gateway_env                       = make_env()
    gateway_env.stripe_webhook_secret = ''
    with TestingContext(db_path='file:test_server_stripe_unconfigured_db?mode=memory&cache=shared', uri=True, gateway_env=gateway_env) as ctx:
        response = ctx.flask_client.post(server.ROUTE_STRIPE_CHECKOUT, data=b'{}', headers={'Stripe-Signature': 't=1,v1=00'})
        assert response.status_code == 500 and response.json == {'error': 'server misconfigured'}

def test_stripe_unhandled_product_and_missing_items(monkeypatch):
    err                       = base.ErrorSink()
    db: backend.SetupDBResult = backend.setup_db(path=':memory:', uri=False, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    gateway_env = make_env()
    session     = {'id': 'cs_1', 'client_reference_id': 'ref', 'status': 'complete', 'payment_status': 'paid'}

    monkeypatch.setattr("platform_stripe.retrieve_session_with_line_items",
                        lambda gateway_env, sid: {'id': sid, 'line_items': {'data': [{'price': {'product': {'id': 'prod_other'}}}]}})
    assert platform_stripe.create_or_fulfill_order(db.sql_conn, gateway_env, session) == platform_stripe.ProcessingStatus.Unhandled
    assert backend.get_latest_payee_by_ref(db.sql_conn, 'ref') is None

    monkeypatch.setattr("platform_stripe.retrieve_session_with_line_items", lambda gateway_env, sid: {'id': sid, 'line_items': {'data': []}})
    assert platform_stripe.create_or_fulfill_order(db.sql_conn, gateway_env, session) == platform_stripe.ProcessingStatus.Skip
    assert db.sql_conn.execute('SELECT reason FROM lapses').fetchall() == [('missing-items',)]
    db.sql_conn.close()

@dataclasses.dataclass
class FakeUpstreamResponse:
    status:  int            = 200
    data:    bytes          = b''
    headers: dict[str, str] = dataclasses.field(default_factory=lambda: {'Content-Type': 'application/json'})

def test_server_session_proxy(monkeypatch):
    requests: list[tuple[str, str, dict[str, str]]] = []
    upstream: list[FakeUpstreamResponse]            = []
    def fake_request(method: str, url: str, body: bytes | None = None, headers: dict[str, str] | None = None) -> FakeUpstreamResponse:
        requests.append((method, url, dict(headers or {})))
        return upstream.pop(0)
    monkeypatch.setattr(session_proxy.http, 'request', fake_request)

    with TestingContext(db_path='file:test_server_proxy_db?mode=memory&cache=shared', uri=True) as ctx:
        cid        = make_cid()
        old_secret = '7:4:1700000000:aabbcc:ddeeff'
        new_secret = '7:4:1700000100:112233:445566'
        enc_secret = cipher.encrypt_for_client(ctx.gateway_env, cid, old_secret)
        assert enc_secret is not None
        auth       = {'Authorization': f'Bearer {enc_secret}'}

        def session_body(secret: str) -> bytes:
            return json.dumps({'data': {'user_id': '7', 'session_auth_hash': secret}, 'metadata': {'serviceRequestId': 'x'}}).encode('utf-8')

        if 1: # A new session secret is encrypted for the client on the way back
            upstream.append(FakeUpstreamResponse(data=session_body(new_secret)))
            response = ctx.flask_client.get(f'/p/Session?rpn=ws&cid={cid}&platform=android', headers=auth)
            assert response.status_code == 200, response.data
            method, url, headers = requests[-1]
            assert method == 'GET'
            assert url    == 'https://api.windscribe.com/Session?platform=android'
            assert headers['Authorization'] == f'Bearer {old_secret}'
            assert all(k.lower() != 'host' for k in headers)

            data = json.loads(response.data)['data']
            assert data['session_auth_hash'] != new_secret
            assert cipher.decrypt_from_client(ctx.gateway_env, cid, data['session_auth_hash']) == new_secret

        if 1: # An unchanged secret is returned as the client sent it
            upstream.append(FakeUpstreamResponse(data=session_body(old_secret)))
            response = ctx.flask_client.get(f'/p/Session?rpn=ws&cid={cid}', headers=auth)
            assert response.status_code == 200
            assert json.loads(response.data)['data']['session_auth_hash'] == enc_secret

        if 1: # A plaintext bearer is forwarded and the secret is stripped from the response
            upstream.append(FakeUpstreamResponse(data=session_body(new_secret)))
            response = ctx.flask_client.get('/p/Session?rpn=wstest', headers={'Authorization': f'Bearer {old_secret}'})
            assert response.status_code == 200
            assert requests[-1][1] == 'https://api-staging.windscribe.com/Session'
            assert 'session_auth_hash' not in json.loads(response.data)['data']

        if 1: # Asset hosts need no auth and are passed through
            upstream.append(FakeUpstreamResponse(data=b'{"servers": []}'))
            response = ctx.flask_client.get('/p/serverlist/mob-v2/1/abc?rpn=wsassets')
            assert response.status_code == 200 and response.data == b'{"servers": []}'
            assert 'Authorization' not in requests[-1][2]

        if 1: # Upstream errors on sensitive paths are passed through untouched
            upstream.append(FakeUpstreamResponse(status=403, data=b'{"errorCode": 701}'))
            response = ctx.flask_client.get(f'/p/Session?rpn=ws&cid={cid}', headers=auth)
            assert response.status_code == 403 and response.data == b'{"errorCode": 701}'

        if 1: # Rejected before anything is forwarded
            sent = len(requests)
            response = ctx.flask_client.get(f'/p/Users?rpn=ws&cid={cid}', headers=auth)
            assert response.status_code == 421 and response.data == b'lost'
            response = ctx.flask_client.get('/p/Session?rpn=example')
            assert response.status_code == 421
            response = ctx.flask_client.get('/p/Session?rpn=ws')
            assert response.status_code == 401 and response.data == b'needs cid or auth'
            response = ctx.flask_client.get('/p/Session?rpn=ws', headers=auth)
            assert response.status_code == 401
            assert len(requests) == sent

def test_server_certfile():
    gateway_env             = make_env()
    gateway_env.tls_certkey = '-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n'
    with TestingContext(db_path='file:test_server_certfile_db?mode=memory&cache=shared', uri=True, gateway_env=gateway_env) as ctx:
        response = ctx.flask_client.get(server.ROUTE_CERTFILE)
        assert response.status_code == 200
        assert response.headers['Cache-Control'] == 'no-cache'
        assert cipher.decrypt_cross_service(gateway_env, response.data.decode('ascii'), base.now_unix_ts_ms()) == gateway_env.tls_certkey

    with TestingContext(db_path='file:test_server_certfile_missing_db?mode=memory&cache=shared', uri=True) as ctx:
        response = ctx.flask_client.get(server.ROUTE_CERTFILE)
        assert response.status_code == 400 and response.data == b'cert not found'
