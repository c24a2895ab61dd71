'''
Entitlement store

A narrow CRUD layer over SQLite for the records the gateway keeps:

  clients      - identities issued to payers/devices (`cid`, 64 hex chars)
  playorders   - one row per Google Play purchase token, the latest purchase JSON wins
  stripeorders - one row per settled Stripe checkout session for the proxy product
  ws           - the encrypted third-party session credential for a client (at most one per cid)
  lapses       - Stripe checkout sessions that could not be attributed to a client
  payees       - Stripe checkout sessions that were paid for a known product

Every public operation is a single statement. Failures (constraint violations, locked DB) are
reported through `StoreResult.success` rather than raised, a missing connection is a configuration
error and is raised as `base.ConfigError`.
'''
import traceback
import sqlite3
import os
import time
import typing
import dataclasses
import logging

import base

log = logging.Logger("BACKEND")

@dataclasses.dataclass
class StoreResult:
    success:       bool = False
    rows_affected: int  = 0
    duration_ms:   int  = 0

@dataclasses.dataclass
class ClientRow:
    cid:              str             = ''
    meta:             str | None      = None
    kind:             base.ClientKind = base.ClientKind.Play
    ctime_unix_ts_ms: int             = 0
    mtime_unix_ts_ms: int             = 0

@dataclasses.dataclass
class PlayOrderRow:
    purchasetoken:    str        = ''
    meta:             str | None = None
    cid:              str        = ''
    linkedtoken:      str | None = None
    ctime_unix_ts_ms: int        = 0
    mtime_unix_ts_ms: int        = 0

@dataclasses.dataclass
class StripeOrderRow:
    sid:              str        = ''
    prod:             str | None = None
    meta:             str | None = None
    cid:              str | None = None  # Unset until the payer redeems the order for a credential
    ctime_unix_ts_ms: int        = 0

@dataclasses.dataclass
class CredentialRow:
    sessiontoken:     str        = ''   # Hex AES-GCM ciphertext of the third-party session secret
    cid:              str        = ''
    userid:           str        = ''
    sid:              str | None = None
    purchasetoken:    str | None = None
    ctime_unix_ts_ms: int        = 0
    mtime_unix_ts_ms: int        = 0

@dataclasses.dataclass
class PayeeRow:
    id:         str        = ''   # Stripe checkout session id
    ref:        str        = ''   # client_reference_id
    sess_stat:  str        = ''
    pay_stat:   str        = ''
    prod:       str        = ''
    tx:         str | None = None
    unix_ts_ms: int        = 0

@dataclasses.dataclass
class SetupDBResult:
    """
    Class is returned by backend.setup_db() which opens the DB and maintains a connection to the DB
    via `sql_conn`. Caller must close `sql_conn` if they wish to release the connection from the DB.

    Normally you would not return the DB connection as it's easy to accidentally leak the DB
    connection in this object however we also use this in tests which use an in-memory transient DB
    If we were to close connection before returning to the user, the DB will be wiped from memory
    making it useless for tests.
    """
    path:     str                       = ''
    success:  bool                      = False
    sql_conn: sqlite3.Connection | None = None

def connect(db_path: str, uri: bool) -> sqlite3.Connection:
    result = sqlite3.connect(db_path, uri=uri, check_same_thread=False)
    # NOTE: Foreign keys are enforced per connection and the pragma is a no-op inside a transaction
    _ = result.execute('PRAGMA foreign_keys = ON')
    return result

@dataclasses.dataclass
class OpenDBAtPath:
    """
    Open a pre-existing DB at the specified path. This class should be used in a `with` context to
    ensure that the connection established to the database is closed on scope exit, e.g.:

    with OpenDBAtPath(...) as db:
        # Use db.sql_conn =
        pass
    """

    sql_conn: sqlite3.Connection
    def __init__(self, db_path: str, uri: bool = False):
        self.sql_conn = connect(db_path, uri)

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

def _require_conn(sql_conn: sqlite3.Connection | None, label: str) -> sqlite3.Connection:
    if sql_conn is None:
        raise base.ConfigError(f'{label}: no database connection was bound')
    return sql_conn

def _write(sql_conn: sqlite3.Connection | None, label: str, sql: str, params: tuple[typing.Any, ...]) -> StoreResult:
    conn   = _require_conn(sql_conn, label)
    result = StoreResult()
    start  = time.perf_counter()
    try:
        with base.SQLTransaction(conn) as tx:
            assert tx.cursor is not None
            _                    = tx.cursor.execute(sql, params)
            result.rows_affected = tx.cursor.rowcount
        result.success = True
    except sqlite3.IntegrityError as e:
        log.warning(f'{label}: constraint violated: {e}')
    except sqlite3.OperationalError as e:
        log.error(f'{label}: DB error: {e}')
    result.duration_ms = int((time.perf_counter() - start) * 1000)
    return result

def _read_one(sql_conn: sqlite3.Connection | None, label: str, sql: str, params: tuple[typing.Any, ...]) -> tuple[typing.Any, ...] | None:
    conn   = _require_conn(sql_conn, label)
    result = None
    try:
        with base.SQLTransaction(conn) as tx:
            assert tx.cursor is not None
            _      = tx.cursor.execute(sql, params)
            result = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    except sqlite3.OperationalError as e:
        log.error(f'{label}: DB error: {e}')
    return result

def insert_client_if_absent(sql_conn: sqlite3.Connection | None, cid: str, meta: str | None, kind: base.ClientKind, unix_ts_ms: int) -> StoreResult:
    result = _write(sql_conn, 'Insert client', '''
        INSERT OR IGNORE INTO clients (cid, meta, kind, ctime_unix_ts_ms, mtime_unix_ts_ms)
        VALUES (?, ?, ?, ?, ?)
    ''', (cid, meta, int(kind), unix_ts_ms, unix_ts_ms))
    return result

def get_client(sql_conn: sqlite3.Connection | None, cid: str) -> ClientRow | None:
    row = _read_one(sql_conn, 'Get client', '''
        SELECT cid, meta, kind, ctime_unix_ts_ms, mtime_unix_ts_ms FROM clients WHERE cid = ?
    ''', (cid,))
    result = None
    if row is not None:
        result = ClientRow(cid=row[0], meta=row[1], kind=base.ClientKind(int(row[2])), ctime_unix_ts_ms=row[3], mtime_unix_ts_ms=row[4])
    return result

def upsert_playorder(sql_conn:       sqlite3.Connection | None,
                     cid:            str,
                     purchase_token: str,
                     linked_token:   str | None,
                     meta:           str | None,
                     unix_ts_ms:     int) -> StoreResult:
    # NOTE: Last write wins, the owning cid is never rewritten once the order is on file
    result = _write(sql_conn, 'Upsert play order', '''
        INSERT INTO playorders (purchasetoken, meta, cid, linkedtoken, ctime_unix_ts_ms, mtime_unix_ts_ms)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(purchasetoken) DO UPDATE SET
            meta             = excluded.meta,
            linkedtoken      = excluded.linkedtoken,
            mtime_unix_ts_ms = excluded.mtime_unix_ts_ms
    ''', (purchase_token, meta, cid, linked_token, unix_ts_ms, unix_ts_ms))
    return result

def _playorder_from_row(row: tuple[typing.Any, ...]) -> PlayOrderRow:
    result = PlayOrderRow(purchasetoken    = row[0],
                          meta             = row[1],
                          cid              = row[2],
                          linkedtoken      = row[3],
                          ctime_unix_ts_ms = row[4],
                          mtime_unix_ts_ms = row[5])
    return result

def get_playorder(sql_conn: sqlite3.Connection | None, purchase_token: str) -> PlayOrderRow | None:
    row = _read_one(sql_conn, 'Get play order', '''
        SELECT purchasetoken, meta, cid, linkedtoken, ctime_unix_ts_ms, mtime_unix_ts_ms
        FROM   playorders
        WHERE  purchasetoken = ?
    ''', (purchase_token,))
    result = _playorder_from_row(row) if row is not None else None
    return result

def get_first_linked_playorder(sql_conn: sqlite3.Connection | None, purchase_token: str) -> PlayOrderRow | None:
    '''Returns the order (if any) that replaced `purchase_token`, i.e. names it as its linked token'''
    row = _read_one(sql_conn, 'Get linked play order', '''
        SELECT purchasetoken, meta, cid, linkedtoken, ctime_unix_ts_ms, mtime_unix_ts_ms
        FROM   playorders
        WHERE  linkedtoken = ?
        LIMIT  1
    ''', (purchase_token,))
    result = _playorder_from_row(row) if row is not None else None
    return result

def upsert_stripeorder(sql_conn: sqlite3.Connection | None, sid: str, prod: str, meta: str | None, unix_ts_ms: int) -> StoreResult:
    # NOTE: Stripe redelivers events, a replay refreshes the session JSON and keeps the rest
    result = _write(sql_conn, 'Upsert stripe order', '''
        INSERT INTO stripeorders (sid, prod, meta, cid, ctime_unix_ts_ms)
        VALUES (?, ?, ?, NULL, ?)
        ON CONFLICT(sid) DO UPDATE SET
            prod = excluded.prod,
            meta = excluded.meta
    ''', (sid, prod, meta, unix_ts_ms))
    return result

def get_stripeorder(sql_conn: sqlite3.Connection | None, sid: str) -> StripeOrderRow | None:
    row = _read_one(sql_conn, 'Get stripe order', '''
        SELECT sid, prod, meta, cid, ctime_unix_ts_ms FROM stripeorders WHERE sid = ?
    ''', (sid,))
    result = None
    if row is not None:
        result = StripeOrderRow(sid=row[0], prod=row[1], meta=row[2], cid=row[3], ctime_unix_ts_ms=row[4])
    return result

def get_credential(sql_conn: sqlite3.Connection | None, cid: str) -> CredentialRow | None:
    row = _read_one(sql_conn, 'Get credential', '''
        SELECT sessiontoken, cid, userid, sid, purchasetoken, ctime_unix_ts_ms, mtime_unix_ts_ms
        FROM   ws
        WHERE  cid = ?
    ''', (cid,))
    result = None
    if row is not None:
        result = CredentialRow(sessiontoken     = row[0],
                               cid              = row[1],
                               userid           = row[2],
                               sid              = row[3],
                               purchasetoken    = row[4],
                               ctime_unix_ts_ms = row[5],
                               mtime_unix_ts_ms = row[6])
    return result

def insert_credential(sql_conn:       sqlite3.Connection | None,
                      cid:            str,
                      userid:         str,
                      enc_token:      str,
                      unix_ts_ms:     int,
                      purchase_token: str | None = None,
                      sid:            str | None = None) -> StoreResult:
    '''
    Fails with success=False when `cid` already has a credential, the caller lost the race and
    must re-read the row that won.
    '''
    result = _write(sql_conn, 'Insert credential', '''
        INSERT INTO ws (sessiontoken, cid, userid, sid, purchasetoken, ctime_unix_ts_ms, mtime_unix_ts_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (enc_token, cid, userid, sid, purchase_token, unix_ts_ms, unix_ts_ms))
    return result

def touch_credential(sql_conn: sqlite3.Connection | None, cid: str, unix_ts_ms: int) -> StoreResult:
    result = _write(sql_conn, 'Touch credential', '''
        UPDATE ws SET mtime_unix_ts_ms = ? WHERE cid = ?
    ''', (unix_ts_ms, cid))
    return result

def delete_credential(sql_conn: sqlite3.Connection | None, cid: str) -> StoreResult:
    result = _write(sql_conn, 'Delete credential', 'DELETE FROM ws WHERE cid = ?', (cid,))
    return result

def insert_lapse(sql_conn: sqlite3.Connection | None, sid: str, tx: str, reason: str, unix_ts_ms: int) -> StoreResult:
    result = _write(sql_conn, 'Insert lapse', '''
        INSERT OR REPLACE INTO lapses (id, tx, reason, unix_ts_ms) VALUES (?, ?, ?, ?)
    ''', (sid, tx, reason, unix_ts_ms))
    return result

def insert_payee(sql_conn:   sqlite3.Connection | None,
                 sid:        str,
                 ref:        str,
                 sess_stat:  str,
                 pay_stat:   str,
                 prod:       str,
                 tx:         str,
                 unix_ts_ms: int) -> StoreResult:
    result = _write(sql_conn, 'Insert payee', '''
        INSERT OR REPLACE INTO payees (id, ref, sess_stat, pay_stat, prod, tx, unix_ts_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (sid, ref, sess_stat, pay_stat, prod, tx, unix_ts_ms))
    return result

def get_latest_payee_by_ref(sql_conn: sqlite3.Connection | None, ref: str) -> PayeeRow | None:
    row = _read_one(sql_conn, 'Get payee', '''
        SELECT   id, ref, sess_stat, pay_stat, prod, tx, unix_ts_ms
        FROM     payees
        WHERE    ref = ?
        ORDER BY unix_ts_ms DESC
        LIMIT    1
    ''', (ref,))
    result = None
    if row is not None:
        result = PayeeRow(id=row[0], ref=row[1], sess_stat=row[2], pay_stat=row[3], prod=row[4], tx=row[5], unix_ts_ms=row[6])
    return result

def db_info_string(sql_conn: sqlite3.Connection, db_path: str, err: base.ErrorSink) -> str:
    counts: dict[str, int] = {}
    db_size                = 0
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        try:
            for table in ('clients', 'playorders', 'stripeorders', 'ws', 'lapses', 'payees'):
                _             = tx.cursor.execute(f'SELECT COUNT(*) FROM {table}')
                counts[table] = typing.cast(tuple[int], tx.cursor.fetchone())[0]
        except sqlite3.Error as e:
            err.msg_list.append(f"Failed to retrieve DB metadata: {e}")

    result = ''
    if len(err.msg_list) == 0:
        if os.path.exists(db_path):
            db_size = os.stat(db_path).st_size
        result = (
            '  DB:                          {} ({} bytes)\n'.format(db_path, db_size) +
            '  Clients/Credentials:         {}/{}\n'.format(counts['clients'], counts['ws']) +
            '  Play/Stripe Orders:          {}/{}\n'.format(counts['playorders'], counts['stripeorders']) +
            '  Payees/Lapses:               {}/{}'.format(counts['payees'], counts['lapses'])
        )
    return result

def setup_db(path: str, uri: bool, err: base.ErrorSink) -> SetupDBResult:
    result: SetupDBResult = SetupDBResult()
    result.path           = path
    try:
        result.sql_conn = connect(path, uri)
    except sqlite3.Error as e:
        err.msg_list.append(f'Failed to open/connect to DB at {path}: {e}')
        return result

    with base.SQLTransaction(result.sql_conn) as tx:
        sql_stmt: str = '''
            CREATE TABLE IF NOT EXISTS clients (
                cid              TEXT PRIMARY KEY NOT NULL,
                meta             TEXT,              -- Provider profile JSON, if any
                kind             INTEGER NOT NULL,  -- base.ClientKind
                ctime_unix_ts_ms INTEGER NOT NULL,
                mtime_unix_ts_ms INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS playorders (
                purchasetoken    TEXT PRIMARY KEY NOT NULL,
                meta             TEXT,              -- Latest purchase JSON from Google Play
                cid              TEXT NOT NULL,
                linkedtoken      TEXT,              -- Token this purchase replaced (upgrade/downgrade)
                ctime_unix_ts_ms INTEGER NOT NULL,
                mtime_unix_ts_ms INTEGER NOT NULL,
                FOREIGN KEY (cid) REFERENCES clients(cid) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS playorders_linkedtoken ON playorders(linkedtoken);

            CREATE TABLE IF NOT EXISTS stripeorders (
                sid              TEXT PRIMARY KEY NOT NULL,
                prod             TEXT,
                meta             TEXT,
                cid              TEXT,
                ctime_unix_ts_ms INTEGER NOT NULL,
                FOREIGN KEY (cid) REFERENCES clients(cid) ON DELETE CASCADE
            );

            -- NOTE: Orders referenced by a credential can't be deleted until the credential has
            -- been revoked with the third party and removed
            CREATE TABLE IF NOT EXISTS ws (
                sessiontoken     TEXT PRIMARY KEY NOT NULL,
                cid              TEXT UNIQUE NOT NULL,
                userid           TEXT NOT NULL,
                sid              TEXT,
                purchasetoken    TEXT,
                ctime_unix_ts_ms INTEGER NOT NULL,
                mtime_unix_ts_ms INTEGER NOT NULL,
                FOREIGN KEY (cid)           REFERENCES clients(cid),
                FOREIGN KEY (sid)           REFERENCES stripeorders(sid)          ON DELETE RESTRICT,
                FOREIGN KEY (purchasetoken) REFERENCES playorders(purchasetoken)  ON DELETE RESTRICT
            );

            CREATE TABLE IF NOT EXISTS lapses (
                id         TEXT PRIMARY KEY NOT NULL,
                tx         TEXT,
                reason     TEXT,
                unix_ts_ms INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS payees (
                id         TEXT PRIMARY KEY NOT NULL,
                ref        TEXT NOT NULL,
                sess_stat  TEXT,
                pay_stat   TEXT,
                prod       TEXT,
                tx         TEXT,
                unix_ts_ms INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS payees_ref ON payees(ref);
        '''

        assert tx.cursor is not None

        try:
            # NOTE: Bootstrap tables
            _ = tx.cursor.executescript(sql_stmt)
            _ = tx.cursor.execute('''PRAGMA journal_mode=WAL''')

            # NOTE: Version migration
            target_db_version = 1
            if 1:
                db_version: int = tx.cursor.execute('PRAGMA user_version').fetchone()[0]  # pyright: ignore[reportAny]

                # NOTE: v0 is the nil state, it means the DB has never been bootstrapped. All the
                # tables will have been created with the latest schema so we teleport to the target
                # version
                if db_version == 0:
                    db_version = target_db_version
                    _          = tx.cursor.execute(f'PRAGMA user_version = {db_version}')

                # NOTE: Verify that the DB was migrated to the target version
                assert db_version == target_db_version

            result.success = True
        except Exception:
            err.msg_list.append(f"Failed to bootstrap DB tables: {traceback.format_exc()}")

    if not result.success:
        result.sql_conn.close()
        result.sql_conn = None

    return result
