'''
Shared helpers for the gateway modules and the test suite. Nothing in here imports a project file:
JSON field extraction that reports into an ErrorSink, timestamp arithmetic, log redaction, the
SQLite transaction wrapper and the logging plumbing main.py installs.
'''
import os
import sys
import enum
import json
import math
import time
import queue
import typing
import hashlib
import logging
import sqlite3
import calendar
import datetime
import threading
import traceback
import dataclasses

import urllib3
import typing_extensions

# NOTE: Constants
MILLISECONDS_IN_DAY: int = 60 * 60 * 24 * 1000

# NOTE: Global variables, assigned once by main.py at startup
DB_PATH              = ''
DB_PATH_IS_URI       = False
UNSAFE_LOGGING       = False
PLATFORM_TESTING_ENV = False

# NOTE: Only the subset of JSON the provider payloads actually use
JSONPrimitive: typing.TypeAlias = str | int | float | bool | None
JSONValue:     typing.TypeAlias = JSONPrimitive | dict[str, 'JSONValue'] | list['JSONValue']
JSONObject:    typing.TypeAlias = dict[str, JSONValue]
JSONArray:     typing.TypeAlias = list[JSONValue]

class ConfigError(Exception):
    '''
    Raised when a secret, binding or setting that an operation requires has not been configured.
    These are never defaulted silently, the caller is expected to surface them as a server error.
    '''

class ClientKind(enum.IntEnum):
    """
    Origin of a client identifier. Stored as an int in the database, existing entries must not be
    reordered or changed.
    """
    Play      = 0 # Copied from the obfuscated external account id of a Google Play purchase
    Generated = 1 # Freshly generated because no usable identifier was supplied
    Stripe    = 2 # Client reference id of a Stripe checkout session

class LogFormatter(logging.Formatter):
    @typing_extensions.override
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None):
        result = datetime.datetime.fromtimestamp(record.created).strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
        return result

@dataclasses.dataclass
class ErrorSink:
    '''
    Collects validation messages so a parser can keep going after the first bad field and report
    everything that was wrong at once. Callers check `has()` when they are done and `build()` the
    messages into one string for the log. The Play purchase parsers lean on this heavily.
    '''
    msg_list: list[str] = dataclasses.field(default_factory=list)

    def has(self) -> bool:
        result = len(self.msg_list) > 0
        return result

    def build(self) -> str:
        result = '\n  '.join(self.msg_list)
        return result

@dataclasses.dataclass
class JSONResponse:
    '''Status and JSON body returned by an endpoint, server.py turns it into the Flask response'''
    status: int        = 200
    body:   JSONObject = dataclasses.field(default_factory=dict)

class SQLTransaction:
    '''
    `with SQLTransaction(conn) as tx:` runs the block in one deferred transaction on `tx.cursor`.
    It commits on a clean exit and rolls back if the block raised or set `cancel`.
    '''
    def __init__(self, conn: sqlite3.Connection):
        self.conn                          = conn
        self.cursor: sqlite3.Cursor | None = None
        self.cancel: bool                  = False

    def __enter__(self):
        self.cursor = self.conn.execute('BEGIN TRANSACTION')
        return self

    def __exit__(self, exc_type: object | None, exc_value: object | None, tb: traceback.TracebackException | None):
        if self.cursor:
            self.cursor.close()
        if exc_type is not None or self.cancel:
            self.conn.rollback()
        else:
            self.conn.commit()
        return False

class AsyncWebhookLogHandler(logging.Handler):
    '''
    Forwards warning and error log records to a chat webhook (Slack/Mattermost style
    `{"text", "display_name"}` payload). Records are queued and posted from a daemon thread so
    a request handler never waits on the network to log. A full queue drops the record.
    '''
    BATCH_SIZE: int = 10

    def __init__(self, webhook_url: str, display_name: str, timeout: int = 5, queue_size: int = 100, flush_interval: float = 1.0):
        super().__init__()
        self.webhook_url    = webhook_url
        self.display_name   = display_name
        self.flush_interval = flush_interval
        self.pending: queue.Queue[dict[str, str]] = queue.Queue(maxsize=queue_size)
        self.http = urllib3.PoolManager(timeout = urllib3.Timeout(connect=timeout, read=timeout),
                                        maxsize = 10,
                                        retries = urllib3.Retry(total=1, backoff_factor=0.1))

        self.stop_event = threading.Event()
        self.thread     = threading.Thread(target=self._drain, daemon=True)
        self.thread.start()

    def emit_text(self, text: str):
        # NOTE: Chat clients render the body as preformatted text, long bodies are cut
        payload = {'text': '```\n' + text[:2000] + '\n```', 'display_name': self.display_name}
        try:
            self.pending.put_nowait(payload)
        except queue.Full:
            pass

    @typing_extensions.override
    def emit(self, record: logging.LogRecord):
        if record.levelno >= logging.WARNING:
            try:
                self.emit_text(self.format(record))
            except Exception:
                self.handleError(record)

    def _post(self, payload: dict[str, str]):
        try:
            _ = self.http.request('POST',
                                  self.webhook_url,
                                  body    = json.dumps(payload).encode('utf-8'),
                                  headers = {'Content-Type': 'application/json'})
        except urllib3.exceptions.HTTPError as e:
            # NOTE: This is a logging handler, a failure can't go back through logging
            print(f'[AsyncWebhook] Send failed: {e}', file=sys.stderr)

    def _drain(self):
        while not self.stop_event.is_set():
            for _ in range(self.BATCH_SIZE):
                try:
                    payload = self.pending.get_nowait()
                except queue.Empty:
                    break
                self._post(payload)
                self.pending.task_done()
            _ = self.stop_event.wait(self.flush_interval)

    @typing_extensions.override
    def close(self):
        self.stop_event.set()
        if self.thread.is_alive():
            self.thread.join(timeout=2)
        super().close()

def is_hex(val: str) -> bool:
    result = len(val) > 0 and all(c in '0123456789abcdefABCDEF' for c in val)
    return result

def now_unix_ts_ms() -> int:
    result = int(time.time() * 1000)
    return result

def _utc(unix_ts_ms: int) -> datetime.datetime:
    result = datetime.datetime.fromtimestamp(unix_ts_ms / 1000.0, tz=datetime.timezone.utc)
    return result

def readable_unix_ts_ms(unix_ts_ms: int) -> str:
    date_str = datetime.datetime.fromtimestamp(unix_ts_ms / 1000.0).strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
    result   = f'{unix_ts_ms} ({date_str})'
    return result

def iso8601_from_unix_ts_ms(unix_ts_ms: int) -> str:
    '''Format a timestamp the way a JavaScript `Date.toISOString()` does, e.g. 2025-01-31T10:00:00.000Z'''
    dt     = _utc(unix_ts_ms)
    result = dt.strftime('%Y-%m-%dT%H:%M:%S.') + f'{dt.microsecond // 1000:03d}Z'
    return result

def unix_ts_ms_from_yyyy_mm_dd(text: str) -> int | None:
    '''Parse a calendar date (yyyy-mm-dd) as midnight UTC'''
    result = None
    try:
        dt     = datetime.datetime.strptime(text, '%Y-%m-%d').replace(tzinfo=datetime.timezone.utc)
        result = int(dt.timestamp() * 1000)
    except ValueError:
        pass
    return result

def add_months_to_unix_ts_ms(unix_ts_ms: int, months: int) -> int:
    '''
    Add calendar months to a UTC timestamp keeping the time of day. When the day of the month does
    not exist in the target month it is clamped to the last day of that month (Jan 31 + 1 month
    is the last day of Feb).
    '''
    dt          = _utc(unix_ts_ms)
    month_index = dt.year * 12 + (dt.month - 1) + months
    year        = month_index // 12
    month       = month_index % 12 + 1
    day         = min(dt.day, calendar.monthrange(year, month)[1])
    result      = int(dt.replace(year=year, month=month, day=day).timestamp() * 1000)
    return result

def days_until(target_unix_ts_ms: int, base_unix_ts_ms: int) -> int:
    '''Whole days from base until target rounded up, i.e. anything less than 24h away is 1 day'''
    result = math.ceil((target_unix_ts_ms - base_unix_ts_ms) / MILLISECONDS_IN_DAY)
    return result

def months_until(target_unix_ts_ms: int, base_unix_ts_ms: int) -> int:
    '''Calendar month difference between the two timestamps, ignoring the day of the month'''
    target = _utc(target_unix_ts_ms)
    since  = _utc(base_unix_ts_ms)
    result = (target.year - since.year) * 12 + (target.month - since.month)
    return result

def _print_box(rows: list[list[str]]):
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    def rule(left: str, mid: str, right: str) -> str:
        return left + mid.join('─' * (w + 2) for w in widths) + right

    print(rule('┌', '┬', '┐'))
    for index, row in enumerate(rows):
        print('│' + '│'.join(f' {field:<{widths[i]}} ' for i, field in enumerate(row)) + '│')
        if index == 0:
            print(rule('├', '┼', '┤'))
    print(rule('└', '┴', '┘'))

def _printable_cell(table: str, col: str, value: typing.Any) -> str:
    if value is None:
        result = 'None'
    elif col.endswith('unix_ts_ms'):
        result = readable_unix_ts_ms(int(value))
    elif table == 'clients' and col == 'kind':
        kind   = ClientKind(int(value))
        result = f'{kind.name} ({kind.value})'
    elif col in ('meta', 'tx'):
        # NOTE: Provider JSON can be large and has PII, print the size only
        result = f'<json ({len(str(value))})>'
    elif col in ('sessiontoken', 'purchasetoken', 'linkedtoken'):
        result = obfuscate(str(value))
    else:
        result = str(value)
    return result

def print_db_to_stdout(sql_conn: sqlite3.Connection) -> None:
    '''Dump every table as a box drawn table, secrets obfuscated and timestamps made readable'''
    with SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        tables = [row[0] for row in tx.cursor.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()]
        for table in tables:
            rows    = tx.cursor.execute(f'SELECT * FROM {table}').fetchall()
            columns = [description[0] for description in tx.cursor.description]
            print(f'Table: {table}')
            _print_box([columns] + [[_printable_cell(table, columns[i], v) for i, v in enumerate(row)] for row in rows])

def obfuscate(val: str) -> str:
    """Keep roughly the outer 30% of each end of `val` for log correlation, strings under 3 characters are returned as is"""
    if len(val) < 3:
        return val
    n_ends = max(math.floor(len(val) * 0.3), 1)
    return f"{val[:n_ends]}…{val[-n_ends:]}"

def purchase_id(purchase_token: str) -> str:
    """
    One-way identifier for a provider purchase token that is safe to hand back to clients and to
    write to logs in place of the raw token.
    """
    result = hashlib.sha256(purchase_token.encode('utf-8')).hexdigest()
    return result

def _key_outline(d: dict[str, typing.Any]) -> str:
    '''Keys of a nested dict without any of its values, e.g. "a, b: {c, d}"'''
    result = ', '.join(f'{k}: {{{_key_outline(v)}}}' if isinstance(v, dict) else k for k, v in d.items())
    return result

def safe_dump_dict_keys_or_data(d: dict[str, typing.Any] | None) -> str:
    """Dump the dict, or only its keys unless UNSAFE_LOGGING is set"""
    if d is None:
        return "None"
    if UNSAFE_LOGGING:
        return json.dumps(d)
    return "dictionary w/ keys: {" + _key_outline(d) + "}"

def safe_dump_arbitrary_value_or_type(v: typing.Any) -> str:  # pyright: ignore[reportAny]
    """Dump the value, or only its type unless UNSAFE_LOGGING is set"""
    result = f'({type(v)}) {v}' if UNSAFE_LOGGING else f'{type(v)}'
    return result

T = typing.TypeVar('T')

def _json_dict_get(d: JSONObject, key: str, kind: type | tuple[type, ...], label: str, default: T, required: bool, err: ErrorSink) -> T:
    result = default
    if key not in d:
        if required:
            err.msg_list.append(f'Required key "{key}" is missing from JSON: {safe_dump_dict_keys_or_data(d)}')
        return result

    value = d[key]
    # NOTE: bool is an int in Python but never in JSON
    if isinstance(value, kind) and not (isinstance(value, bool) and kind is int):
        result = typing.cast(T, value)
    else:
        err.msg_list.append(f'Key "{key}" value was not {label}: "{safe_dump_arbitrary_value_or_type(value)}"')
    return result

def json_dict_require_str(d: JSONObject, key: str, err: ErrorSink) -> str:
    return _json_dict_get(d, key, str, 'a string', '', True, err)

def json_dict_require_int(d: JSONObject, key: str, err: ErrorSink) -> int:
    return _json_dict_get(d, key, int, 'an integer', 0, True, err)

def json_dict_require_array(d: JSONObject, key: str, err: ErrorSink) -> JSONArray:
    return _json_dict_get(d, key, list, 'an array', typing.cast(JSONArray, []), True, err)

def json_dict_require_obj(d: JSONObject, key: str, err: ErrorSink) -> JSONObject:
    return _json_dict_get(d, key, dict, 'an object', typing.cast(JSONObject, {}), True, err)

def json_dict_optional_bool(d: JSONObject, key: str, default: bool, err: ErrorSink) -> bool:
    return _json_dict_get(d, key, bool, 'a bool', default, False, err)

def json_dict_optional_int(d: JSONObject, key: str, default: int, err: ErrorSink) -> int:
    return _json_dict_get(d, key, int, 'an integer', default, False, err)

def json_dict_optional_str(d: JSONObject, key: str, err: ErrorSink) -> str | None:
    return _json_dict_get(d, key, str, 'a string', typing.cast(str | None, None), False, err)

def json_dict_optional_obj(d: JSONObject, key: str, err: ErrorSink) -> JSONObject | None:
    return _json_dict_get(d, key, dict, 'an object', typing.cast(JSONObject | None, None), False, err)

def json_dict_require_str_coerce_to_int(d: JSONObject, key: str, err: ErrorSink) -> int:
    '''Google sends 64 bit integers (e.g. eventTimeMillis) as strings'''
    text   = json_dict_require_str(d, key, err)
    result = 0
    try:
        result = int(text)
    except ValueError as e:
        err.msg_list.append(f'Unable to parse {key} type to an int: {e}')
    return result

def json_dict_require_str_coerce_to_enum(d: JSONObject, key: str, my_enum: typing.Type[enum.StrEnum], err: ErrorSink):
    result = my_enum._value2member_map_.get(json_dict_require_str(d, key, err))
    if result is None:
        err.msg_list.append(f'Unable to parse {key} type to an enum')
    return result

def os_get_boolean_env(var_name: str, default: bool = False) -> bool:
    '''Read a 0/1 flag from the environment, anything else is a startup error'''
    value = os.getenv(var_name)
    if value is None:
        return default
    if value not in ('0', '1'):
        raise ValueError(f"Invalid value for environment variable '{var_name}': {value}. Allowed values are 0 or 1.")
    return value == '1'
