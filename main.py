'''
Main entry point for the RPN gateway. This runs the necessary setup code like initialising the DB
and reading the startup configuration before handing over control-flow to Flask.

This application has options that must be specified in an .INI file and/or as environment
variables because this application runs directly as a flask app (in a dev environment) and it also
can be served over UWSGI for a production use-case.

UWSGI mounts the flask app with no possibility to forward command line arguments to the underlying
application. Thus we cannot use argparse or flask's @click.options as there's no way to specify
them in the UWSGI manifest hence the design decision to use environment variables.
'''

import pathlib
import os
import flask
import signal
import types
import logging
import logging.handlers
import configparser
import sys
import dataclasses

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

log                                                  = logging.Logger('GATEWAY')
google_thread_context                                = platform_google.ThreadContext()
webhook_loggers: list[base.AsyncWebhookLogHandler]   = []

# NOTE: Every module logger, handlers configured at startup are attached to each one
module_loggers: list[logging.Logger] = [log,
                                        backend.log,
                                        cipher.log,
                                        server.log,
                                        session_broker.log,
                                        session_proxy.log,
                                        platform_google.log,
                                        platform_google_api.log,
                                        platform_stripe.log]

@dataclasses.dataclass
class LogWebhook:
    url:  str = ''
    name: str = ''

@dataclasses.dataclass
class ParsedArgs:
    ini_path:                    str               = ''
    db_path:                     str               = ''
    db_path_is_uri:              bool              = False
    log_path:                    str               = ''
    print_tables:                bool              = False
    unsafe_logging:              bool              = False
    testing_env:                 bool              = False

    with_platform_google:        bool              = False
    google_project_name:         str               = ''
    google_subscription_name:    str               = ''

    log_webhooks:                list[LogWebhook]  = dataclasses.field(default_factory=list)
    gateway_env:                 env.Env           = dataclasses.field(default_factory=env.Env)

def signal_handler(sig: int, _frame: types.FrameType | None):
    # NOTE: Kill the google-thread if one was initiated. The google thread is sleeping on an event
    # that has a timeout that we trigger.
    google_thread_context.kill_thread = True
    google_thread_context.sleep_event.set()

    # NOTE: Unregister handler and resume the default handler by re-raising it
    _ = signal.signal(sig, signal.SIG_DFL)
    signal.raise_signal(sig)

def parse_int(label: str, value: str, fallback: int, err: base.ErrorSink) -> int:
    result = fallback
    try:
        result = int(value)
    except ValueError:
        err.msg_list.append(f'Failed to parse {label} as an integer ({value})')
    return result

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    gateway_env     = result.gateway_env
    result.ini_path = os.getenv('RPN_GATEWAY_INI_PATH', '')
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            log.error(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            sys.exit(1)

        ini_parser = configparser.ConfigParser()
        _          = ini_parser.read(filenames=result.ini_path)

        if 'base' in ini_parser:
            base_section: configparser.SectionProxy = ini_parser['base']
            result.db_path                          = base_section.get(option='db_path',                           fallback='')
            result.db_path_is_uri                   = base_section.getboolean(option='db_path_is_uri',             fallback=False)
            result.log_path                         = base_section.get(option='log_path',                          fallback='')
            result.print_tables                     = base_section.getboolean(option='print_tables',               fallback=False)
            result.unsafe_logging                   = base_section.getboolean(option='unsafe_logging',             fallback=False)
            result.testing_env                      = base_section.getboolean(option='testing_env',                fallback=False)
            gateway_env.account_ids_immutable       = base_section.getboolean(option='account_ids_immutable',      fallback=True)
            gateway_env.grace_period_days           = base_section.getint(option='grace_period_days',              fallback=0)
            gateway_env.aad_cutover_unix_ts_ms      = base_section.getint(option='aad_cutover_unix_ts_ms',         fallback=0)

        if 'crypto' in ini_parser:
            crypto_section: configparser.SectionProxy = ini_parser['crypto']
            gateway_env.kdf_secret_d1                 = crypto_section.get(option='kdf_secret_d1',                 fallback='')
            gateway_env.kdf_secret_client             = crypto_section.get(option='kdf_secret_client',             fallback='')
            gateway_env.kdf_secret_xsvc               = crypto_section.get(option='kdf_secret_xsvc',               fallback='')
            gateway_env.tls_certkey                   = crypto_section.get(option='tls_certkey',                   fallback='')

        if 'ws' in ini_parser:
            ws_section: configparser.SectionProxy = ini_parser['ws']
            gateway_env.ws_api_url                = ws_section.get(option='api_url',                               fallback=gateway_env.ws_api_url)
            gateway_env.ws_wl_id                  = ws_section.get(option='wl_id',                                 fallback='')
            gateway_env.ws_wl_token               = ws_section.get(option='wl_token',                              fallback='')
            gateway_env.ws_test_api_url           = ws_section.get(option='test_api_url',                          fallback=gateway_env.ws_test_api_url)
            gateway_env.ws_test_wl_id             = ws_section.get(option='test_wl_id',                            fallback='')
            gateway_env.ws_test_wl_token          = ws_section.get(option='test_wl_token',                         fallback='')

        if 'stripe' in ini_parser:
            stripe_section: configparser.SectionProxy = ini_parser['stripe']
            gateway_env.stripe_api_key                = stripe_section.get(option='api_key',                       fallback='')
            gateway_env.stripe_webhook_secret         = stripe_section.get(option='webhook_secret',                fallback='')

        if 'google' in ini_parser:
            google_section: configparser.SectionProxy = ini_parser['google']
            result.with_platform_google               = google_section.getboolean(option='enabled',                fallback=False)
            gateway_env.google_package_name           = google_section.get(option='package_name',                  fallback=gateway_env.google_package_name)
            gateway_env.google_app_credentials        = google_section.get(option='app_credentials_path',          fallback='')
            result.google_project_name                = google_section.get(option='project_name',                  fallback='')
            result.google_subscription_name           = google_section.get(option='subscription_name',             fallback='')

        webhook_index = 0
        while True:
            webhook_label: str = f'webhook.{webhook_index}'
            if not ini_parser.has_section(webhook_label):
                break

            webhook_section: configparser.SectionProxy = ini_parser[webhook_label]
            webhook_url:     str | None                = webhook_section.get('url')
            webhook_name:    str | None                = webhook_section.get('name')

            if webhook_name is None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing 'name'")
                sys.exit(1)

            if webhook_url is None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing 'url'")
                sys.exit(1)

            webhook_index += 1
            result.log_webhooks.append(LogWebhook(url=webhook_url, name=webhook_name))

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.db_path                     = os.getenv('RPN_GATEWAY_DB_PATH',                            result.db_path)
    result.db_path_is_uri              = base.os_get_boolean_env('RPN_GATEWAY_DB_PATH_IS_URI',       result.db_path_is_uri)
    result.log_path                    = os.getenv('RPN_GATEWAY_LOG_PATH',                           result.log_path)
    result.print_tables                = base.os_get_boolean_env('RPN_GATEWAY_PRINT_TABLES',         result.print_tables)
    result.unsafe_logging              = base.os_get_boolean_env('RPN_GATEWAY_UNSAFE_LOGGING',       result.unsafe_logging)
    result.testing_env                 = base.os_get_boolean_env('RPN_GATEWAY_TESTING_ENV',          result.testing_env)
    result.with_platform_google        = base.os_get_boolean_env('RPN_GATEWAY_WITH_PLATFORM_GOOGLE', result.with_platform_google)
    result.google_project_name         = os.getenv('RPN_GATEWAY_GOOGLE_PROJECT_NAME',                result.google_project_name)
    result.google_subscription_name    = os.getenv('RPN_GATEWAY_GOOGLE_SUBSCRIPTION_NAME',           result.google_subscription_name)

    gateway_env.account_ids_immutable  = base.os_get_boolean_env('RPN_GATEWAY_ACCOUNT_IDS_IMMUTABLE', gateway_env.account_ids_immutable)
    gateway_env.grace_period_days      = parse_int('RPN_GATEWAY_GRACE_PERIOD_DAYS',
                                                   os.getenv('RPN_GATEWAY_GRACE_PERIOD_DAYS', str(gateway_env.grace_period_days)),
                                                   gateway_env.grace_period_days,
                                                   err)
    gateway_env.aad_cutover_unix_ts_ms = parse_int('RPN_GATEWAY_AAD_CUTOVER_UNIX_TS_MS',
                                                   os.getenv('RPN_GATEWAY_AAD_CUTOVER_UNIX_TS_MS', str(gateway_env.aad_cutover_unix_ts_ms)),
                                                   gateway_env.aad_cutover_unix_ts_ms,
                                                   err)

    gateway_env.kdf_secret_d1          = os.getenv('RPN_GATEWAY_KDF_SECRET_D1',                      gateway_env.kdf_secret_d1)
    gateway_env.kdf_secret_client      = os.getenv('RPN_GATEWAY_KDF_SECRET_CLIENT',                  gateway_env.kdf_secret_client)
    gateway_env.kdf_secret_xsvc        = os.getenv('RPN_GATEWAY_KDF_SECRET_XSVC',                    gateway_env.kdf_secret_xsvc)
    gateway_env.tls_certkey            = os.getenv('RPN_GATEWAY_TLS_CERTKEY',                        gateway_env.tls_certkey)
    gateway_env.ws_api_url             = os.getenv('RPN_GATEWAY_WS_API_URL',                         gateway_env.ws_api_url)
    gateway_env.ws_wl_id               = os.getenv('RPN_GATEWAY_WS_WL_ID',                           gateway_env.ws_wl_id)
    gateway_env.ws_wl_token            = os.getenv('RPN_GATEWAY_WS_WL_TOKEN',                        gateway_env.ws_wl_token)
    gateway_env.ws_test_api_url        = os.getenv('RPN_GATEWAY_WS_TEST_API_URL',                    gateway_env.ws_test_api_url)
    gateway_env.ws_test_wl_id          = os.getenv('RPN_GATEWAY_WS_TEST_WL_ID',                      gateway_env.ws_test_wl_id)
    gateway_env.ws_test_wl_token       = os.getenv('RPN_GATEWAY_WS_TEST_WL_TOKEN',                   gateway_env.ws_test_wl_token)
    gateway_env.stripe_api_key         = os.getenv('RPN_GATEWAY_STRIPE_API_KEY',                     gateway_env.stripe_api_key)
    gateway_env.stripe_webhook_secret  = os.getenv('RPN_GATEWAY_STRIPE_WEBHOOK_SECRET',              gateway_env.stripe_webhook_secret)
    gateway_env.google_package_name    = os.getenv('RPN_GATEWAY_GOOGLE_PACKAGE_NAME',                gateway_env.google_package_name)
    gateway_env.google_app_credentials = os.getenv('RPN_GATEWAY_GOOGLE_APP_CREDENTIALS_PATH',        gateway_env.google_app_credentials)

    # NOTE: Validate. Provider secrets are checked when a request needs them, the root secrets
    # guard every credential and must be present to start.
    if len(result.db_path) == 0:
        err.msg_list.append('db_path was not specified')

    for label, secret in (('kdf_secret_d1', gateway_env.kdf_secret_d1), ('kdf_secret_client', gateway_env.kdf_secret_client)):
        if len(secret) < cipher.SEED_SIZE * 2 or not base.is_hex(secret):
            err.msg_list.append(f'{label} must be at least {cipher.SEED_SIZE * 2} hex characters')

    if result.with_platform_google:
        if len(gateway_env.google_package_name) == 0:
            err.msg_list.append('Platform Google was enabled but package_name was not specified')
        if len(gateway_env.google_app_credentials) == 0:
            err.msg_list.append('Platform Google was enabled but app_credentials_path was not specified')
        if (len(result.google_project_name) == 0) != (len(result.google_subscription_name) == 0):
            err.msg_list.append('Platform Google pull subscription needs both project_name and subscription_name')

    if len(result.log_path) == 0:
        result.log_path = 'rpn-gateway.log'

    return result

def entry_point() -> flask.Flask:
    log_formatter  = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)
    # NOTE: Setup console logger
    for it in module_loggers:
        it.addHandler(console_logger)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup global variables
    err                       = base.ErrorSink()
    parsed_args: ParsedArgs   = parse_args(err)
    base.UNSAFE_LOGGING       = parsed_args.unsafe_logging
    base.DB_PATH              = parsed_args.db_path
    base.DB_PATH_IS_URI       = parsed_args.db_path_is_uri
    base.PLATFORM_TESTING_ENV = parsed_args.testing_env
    if err.has():
        log.error('Failed to startup, invalid configuration options:\n  ' + '\n  '.join(err.msg_list))
        sys.exit(1)

    # NOTE: Setup file logger
    file_logger = logging.handlers.RotatingFileHandler(filename=parsed_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)
    for it in module_loggers:
        it.addHandler(file_logger)

    # NOTE: Equip the log forwarding webhooks if configured
    for webhook in parsed_args.log_webhooks:
        webhook_logger = base.AsyncWebhookLogHandler(webhook_url=webhook.url, display_name=webhook.name)
        webhook_logger.setLevel(logging.WARNING)
        webhook_logger.setFormatter(log_formatter)
        webhook_loggers.append(webhook_logger)
        for it in module_loggers:
            it.addHandler(webhook_logger)

    # NOTE: Ensure the path is setup for writing the database
    if not parsed_args.db_path_is_uri:
        try:
            pathlib.Path(parsed_args.db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error(f'Failed to create directory for {parsed_args.db_path}: {e}')
            sys.exit(1)

    # NOTE: Open the DB (create tables if necessary)
    db: backend.SetupDBResult = backend.setup_db(path=parsed_args.db_path, uri=parsed_args.db_path_is_uri, err=err)
    if err.has():
        log.error(f"{err.msg_list}")
        sys.exit(1)

    # NOTE: Dump some startup diagnostics
    assert db.sql_conn is not None
    info_string: str = backend.db_info_string(sql_conn=db.sql_conn, db_path=db.path, err=err)
    if err.has():
        log.error(f"{err.msg_list}")
        sys.exit(1)

    # NOTE: Handle printing of the DB to standard out if requested
    if parsed_args.print_tables:
        base.print_db_to_stdout(db.sql_conn)
        sys.exit(1)

    gateway_env  = parsed_args.gateway_env
    startup_log  = '\n'
    startup_log += f'RPN Gateway\n{info_string}\n'
    startup_log += f'  Features:\n'
    if len(parsed_args.ini_path) > 0:
        startup_log += f'    Config .INI file loaded: {parsed_args.ini_path}\n'
    if 1:
        label = ' (URI)' if parsed_args.db_path_is_uri else ''
        startup_log += f'    DB loaded from: {db.path}{label}\n'
        startup_log += f'    Logging to: {parsed_args.log_path}\n'
    if parsed_args.unsafe_logging:
        startup_log += f'    Unsafe logging enabled (this must NOT be used in production)\n'
    if parsed_args.testing_env:
        startup_log += f'    Testing environment enabled (entitlement lookups served against the staging session API)\n'
    startup_log += f'    Account ids immutable: {gateway_env.account_ids_immutable}, grace period: {gateway_env.grace_period_days} day(s)\n'
    if gateway_env.aad_cutover_unix_ts_ms > 0:
        startup_log += f'    Credentials bound with AAD since: {base.readable_unix_ts_ms(gateway_env.aad_cutover_unix_ts_ms)}\n'
    if len(gateway_env.stripe_webhook_secret) > 0:
        startup_log += f'    Platform: Stripe checkout webhook enabled\n'
    if parsed_args.with_platform_google:
        mode = 'pull + push' if len(parsed_args.google_subscription_name) > 0 else 'push'
        startup_log += f'    Platform: Google Play Store notification handling enabled ({mode}) for {gateway_env.google_package_name}\n'
    for it in parsed_args.log_webhooks:
        startup_log += f'    Webhook Logger: Enabled (display name: {it.name})\n'

    log.info(startup_log)
    for it in webhook_loggers:
        it.emit_text(f'Starting up instance: {startup_log}')

    # NOTE: Running the application just in Flask (e.g. local development) we need a way to signal
    # to the long-running Google pull thread to terminate itself otherwise the application hangs on
    # exit, forever as the thread is never terminated.
    #
    # In UWSGI by default the signal handler is hijacked, pass `py-call-osafterfork` to make the
    # UWSGI process respect our custom signal handlers.
    _ = signal.signal(signal.SIGINT, signal_handler)  # Ctrl+C
    _ = signal.signal(signal.SIGTERM, signal_handler) # Terminate
    _ = signal.signal(signal.SIGQUIT, signal_handler) # Quit

    result: flask.Flask = server.init(testing_mode   = False,
                                      db_path        = db.path,
                                      db_path_is_uri = parsed_args.db_path_is_uri,
                                      gateway_env    = gateway_env)

    # NOTE: Add flask to our global logger
    if 1:
        result.logger.addHandler(console_logger)
        result.logger.addHandler(file_logger)
        for it in webhook_loggers:
            result.logger.addHandler(it)

    # NOTE: Enable Google Play Store notification handling. Notifications pushed by Pub/Sub arrive on
    # the RTDN route, a pull subscription (if configured) is drained by a dedicated thread.
    if parsed_args.with_platform_google:
        if len(parsed_args.google_subscription_name) > 0:
            global google_thread_context
            google_thread_context = platform_google.init(gateway_env          = gateway_env,
                                                         project_name         = parsed_args.google_project_name,
                                                         subscription_name    = parsed_args.google_subscription_name,
                                                         app_credentials_path = gateway_env.google_app_credentials)
            assert google_thread_context.thread
            google_thread_context.thread.start()
        else:
            platform_google_api.init(gateway_env.google_app_credentials, gateway_env.google_package_name)

    # The flask runner/UWSGI takes over from here and runs the application for us across multiple
    # processes if necessary. We'll close our db connection here. Each request we receive will open
    # their own connection the DB.
    db.sql_conn.close()

    return result

# Flask entry point
flask_app: flask.Flask = entry_point()
