'''
This file is the HTTP layer which declares the functions that serve the routes of the gateway.
These routes are registered onto a Flask application which enables the endpoints for the server.

The role of this layer is to intercept and sanitize the HTTP request, extracting query parameters
and bodies into typed values that are passed into the platform modules (platform_google.py,
platform_stripe.py, session_proxy.py). Those modules answer with a `base.JSONResponse` which is
piped back to the caller as-is.

Configuration errors (missing secrets, unconfigured providers) are answered with a 500.
'''

import json
import flask
import typing
import logging

import base
import env
import backend
import cipher
import platform_google
import platform_stripe
import session_proxy
import session_broker
from platform_google_api import GoogleAPIError
from platform_google_types import STANDARD_PRODUCT_ID

log = logging.Logger('SERVER')

class GetJSONFromFlaskRequest:
    json:    typing.Any = None
    err_msg: str        = ''

# Keys stored in the flask app config dictionary that can be retrieved within a request to get the
# path to the SQLite DB and the gateway's environment to use for that request.
CONFIG_DB_PATH_KEY        = 'rpn_gateway_db_path'
CONFIG_DB_PATH_IS_URI_KEY = 'rpn_gateway_db_path_is_uri'
CONFIG_ENV_KEY            = 'rpn_gateway_env'

# Name of the endpoints exposed on the server
ROUTE_STRIPE_CHECKOUT     = '/stripe/checkout'
ROUTE_GOOGLE_RTDN         = '/g/rtdn'
ROUTE_GOOGLE_ACK          = '/g/ack'
ROUTE_GOOGLE_STOP         = '/g/stop'
ROUTE_GOOGLE_REFUND       = '/g/refund'
ROUTE_GOOGLE_ENTITLEMENT  = '/g/ent'
ROUTE_PROXY               = '/p/<path:path>'
ROUTE_CERTFILE            = '/certfile'

# Errors raised while reconciling a notification that Pub/Sub should redeliver
NOTIFICATION_RETRY_ERRORS = (GoogleAPIError,
                             session_broker.BrokerError,
                             platform_google.ReconcileError,
                             platform_google.CidError)

# The object containing routes that you register onto a Flask app to turn it into an app that
# serves the gateway.
flask_blueprint = flask.Blueprint('rpn-gateway-blueprint', __name__)

def json_response(response: base.JSONResponse) -> flask.Response:
    result             = flask.jsonify(response.body)
    result.status_code = response.status
    return result

def html_bad_response(http_status: int, msg: str | list[str]) -> flask.Response:
    result = json_response(base.JSONResponse(http_status, {'error': msg}))
    return result

def get_json_from_flask_request(request: flask.Request) -> GetJSONFromFlaskRequest:
    result: GetJSONFromFlaskRequest = GetJSONFromFlaskRequest()
    try:
        result.json = json.loads(request.get_data())
        if result.json is None:
            result.err_msg = "JSON failed to be parsed"
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        result.err_msg = str(e)
    return result

def query_str(*keys: str, default: str = '') -> str:
    '''The first of `keys` present in the query string'''
    result = default
    for key in keys:
        value = flask.request.args.get(key)
        if value is not None:
            result = value
            break
    return result

def query_bool(key: str) -> bool:
    result = flask.request.args.get(key, '').lower() in ('1', 'true', 'yes', 'on')
    return result

def init(testing_mode: bool, db_path: str, db_path_is_uri: bool, gateway_env: env.Env) -> flask.Flask:
    result                                   = flask.Flask(__name__)
    result.config['TESTING']                 = testing_mode
    result.config[CONFIG_DB_PATH_KEY]        = db_path
    result.config[CONFIG_DB_PATH_IS_URI_KEY] = db_path_is_uri
    result.config[CONFIG_ENV_KEY]            = gateway_env
    result.register_blueprint(flask_blueprint)
    return result

def open_db_from_flask_request_context(flask_app: flask.Flask) -> backend.OpenDBAtPath:
    assert CONFIG_DB_PATH_KEY        in flask_app.config
    assert CONFIG_DB_PATH_IS_URI_KEY in flask_app.config
    db_path        = typing.cast(str, flask_app.config[CONFIG_DB_PATH_KEY])
    db_path_is_uri = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY])
    result         = backend.OpenDBAtPath(db_path, db_path_is_uri)
    return result

def env_from_flask_request_context(flask_app: flask.Flask) -> env.Env:
    assert CONFIG_ENV_KEY in flask_app.config
    result = typing.cast(env.Env, flask_app.config[CONFIG_ENV_KEY])
    return result

@flask_blueprint.errorhandler(base.ConfigError)
def config_error(e: base.ConfigError) -> flask.Response:
    log.error(f'Configuration error serving {flask.request.path}: {e}')
    result = html_bad_response(500, 'server misconfigured')
    return result

@flask_blueprint.route(ROUTE_STRIPE_CHECKOUT, methods=['POST'])
def stripe_checkout() -> flask.Response:
    gateway_env = env_from_flask_request_context(flask.current_app)
    signature   = flask.request.headers.get('Stripe-Signature', '')
    with open_db_from_flask_request_context(flask.current_app) as db:
        response = platform_stripe.handle_checkout_webhook(db.sql_conn, gateway_env, flask.request.get_data(), signature)
    result = json_response(response)
    return result

@flask_blueprint.route(ROUTE_GOOGLE_RTDN, methods=['POST'])
def google_rtdn() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err  = base.ErrorSink()
    body = platform_google.decode_push_envelope(get.json, err)
    if body is None:
        return html_bad_response(400, err.msg_list)

    gateway_env = env_from_flask_request_context(flask.current_app)
    try:
        with open_db_from_flask_request_context(flask.current_app) as db:
            _ = platform_google.handle_notification(body, db.sql_conn, gateway_env, err)
    except NOTIFICATION_RETRY_ERRORS as e:
        # NOTE: Anything but a 2xx makes Pub/Sub redeliver the notification
        log.error(f'Notification failed, awaiting redelivery: {type(e).__name__}: {e}\nPayload was: {base.safe_dump_dict_keys_or_data(body)}')
        return html_bad_response(500, str(e))

    if err.has():
        log.error(f'{err.build()}\nPayload was: {base.safe_dump_dict_keys_or_data(body)}')
        return html_bad_response(400, err.msg_list)

    result = flask.Response('OK', status=200, mimetype='text/plain')
    return result

def _purchase_request() -> tuple[str, str, str]:
    purchase_token = query_str('purchaseToken', 'purchasetoken')
    cid            = query_str('cid')
    sku            = query_str('sku', 'productId', 'productid', default=STANDARD_PRODUCT_ID)
    result         = (purchase_token, cid, sku)
    return result

@flask_blueprint.route(ROUTE_GOOGLE_ACK, methods=['POST'])
def google_ack() -> flask.Response:
    purchase_token, cid, sku = _purchase_request()
    gateway_env              = env_from_flask_request_context(flask.current_app)
    with open_db_from_flask_request_context(flask.current_app) as db:
        response = platform_google.acknowledge_purchase(db.sql_conn, gateway_env, purchase_token, cid, sku, force=query_bool('force'))
    result = json_response(response)
    return result

@flask_blueprint.route(ROUTE_GOOGLE_STOP, methods=['POST'])
def google_stop() -> flask.Response:
    purchase_token, cid, sku = _purchase_request()
    gateway_env              = env_from_flask_request_context(flask.current_app)
    with open_db_from_flask_request_context(flask.current_app) as db:
        response = platform_google.cancel_subscription(db.sql_conn, gateway_env, purchase_token, cid, sku)
    result = json_response(response)
    return result

@flask_blueprint.route(ROUTE_GOOGLE_REFUND, methods=['POST'])
def google_refund() -> flask.Response:
    purchase_token, cid, sku = _purchase_request()
    gateway_env              = env_from_flask_request_context(flask.current_app)
    with open_db_from_flask_request_context(flask.current_app) as db:
        response = platform_google.revoke_subscription(db.sql_conn, gateway_env, purchase_token, cid, sku)
    result = json_response(response)
    return result

@flask_blueprint.route(ROUTE_GOOGLE_ENTITLEMENT, methods=['GET'])
def google_entitlement() -> flask.Response:
    gateway_env = env_from_flask_request_context(flask.current_app)
    with open_db_from_flask_request_context(flask.current_app) as db:
        response = platform_google.get_entitlement(db.sql_conn, gateway_env, query_str('cid'), test=base.PLATFORM_TESTING_ENV)
    result = json_response(response)
    return result

@flask_blueprint.route(ROUTE_PROXY, methods=['GET', 'POST', 'PUT', 'DELETE', 'PATCH'])
def proxy(path: str) -> flask.Response:
    gateway_env = env_from_flask_request_context(flask.current_app)
    response    = session_proxy.proxy_session_request(gateway_env = gateway_env,
                                                      method      = flask.request.method,
                                                      path        = '/' + path,
                                                      query       = list(flask.request.args.items(multi=True)),
                                                      headers     = dict(flask.request.headers.items()),
                                                      body        = flask.request.get_data())
    result = flask.Response(response.body, status=response.status, content_type=response.content_type)
    return result

@flask_blueprint.route(ROUTE_CERTFILE, methods=['GET'])
def certfile() -> flask.Response:
    gateway_env = env_from_flask_request_context(flask.current_app)
    if len(gateway_env.tls_certkey) == 0:
        return flask.Response('cert not found', status=400, mimetype='text/plain')

    enc_certkey = cipher.encrypt_cross_service(gateway_env, gateway_env.tls_certkey, base.now_unix_ts_ms())
    if enc_certkey is None:
        return flask.Response('cert encryption failed', status=500, mimetype='text/plain')

    result                          = flask.Response(enc_certkey, status=200, mimetype='text/plain')
    result.headers['Cache-Control'] = 'no-cache'
    return result
