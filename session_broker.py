'''
Third-party session broker

Maps a client (`cid`) to an account on the third-party VPN session API (Windscribe whitelabel).
The account's session secret (`session_auth_hash`) is what entitles the client, it is stored
encrypted in the `ws` table (see cipher.py) and re-encrypted for the client whenever it is handed
out.

Per client the broker moves between: no credential, valid, expired, banned and unknown. Status is
always re-derived from the third party on read, nothing is cached. The only lock is the uniqueness
of `ws.cid`, two callers racing to create a credential for the same client both create a session
upstream, one insert wins and the loser deletes the session it created.

API calls used, all JSON:

  POST   {api}Users?session_type_id=4&plan={plan}       whitelabel headers
  GET    {api}Session                                   bearer
  PUT    {api}Users?plan={plan}&delete_credentials=0    whitelabel headers + bearer
  DELETE {api}Users                                     whitelabel headers + bearer
'''
import enum
import json
import time
import typing
import logging
import sqlite3
import dataclasses

import urllib3

import base
import backend
import cipher
import env

log = logging.Logger('BROKER')

SESSION_TYPE_ID:          int = 4
WS_STATUS_BANNED:         int = 3
ERROR_CODE_INVALID:       int = 701   # Submitted session is invalid
ERROR_CODE_SESSION:       int = 6002  # Server error validating session
DELETE_BACKOFF_S:         tuple[int, ...] = (1, 2, 3)
ENTITLEMENT_KIND:         str = 'ws#v1'

http = urllib3.PoolManager(timeout=urllib3.Timeout(connect=5, read=15), retries=False)

class BrokerError(Exception):
    pass

class EntitlementStatus(enum.StrEnum):
    Valid   = 'valid'
    Expired = 'expired'
    Banned  = 'banned'
    Invalid = 'invalid'
    Unknown = 'unknown'

class Plan(enum.StrEnum):
    Month   = 'month'
    Year    = 'year'
    Unknown = 'unknown'

@dataclasses.dataclass
class WSUser:
    user_id:             str        = ''
    session_auth_hash:   str        = ''
    username:            str        = ''
    traffic_used:        int        = -1
    traffic_max:         int        = -2
    status:              int        = -1   # 1 active, 3 banned, anything else inactive
    email:               str | None = None
    email_status:        int        = -1
    billing_plan_id:     int        = -1
    rebill:              int        = -1
    premium_expiry_date: str        = ''   # yyyy-mm-dd
    is_premium:          bool       = False
    reg_date:            int        = 0    # Unix timestamp in seconds
    last_reset:          str | None = None
    loc_rev:             int | None = None
    loc_hash:            str | None = None

    @property
    def expiry_unix_ts_ms(self) -> int:
        result = base.unix_ts_ms_from_yyyy_mm_dd(self.premium_expiry_date)
        return result if result is not None else 0

@dataclasses.dataclass
class Entitlement:
    cid:               str               = ''
    sessiontoken:      str               = ''   # Plaintext, never leaves the process unencrypted
    expiry_unix_ts_ms: int               = 0
    status:            EntitlementStatus = EntitlementStatus.Unknown
    test:              bool              = False

    def to_client(self, gateway_env: env.Env) -> dict[str, base.JSONValue]:
        enc_token = cipher.encrypt_for_client(gateway_env, self.cid, self.sessiontoken)
        if enc_token is None:
            raise BrokerError(f'Failed to encrypt session token for {self.cid}')
        result: dict[str, base.JSONValue] = {
            'kind':         ENTITLEMENT_KIND,
            'cid':          self.cid,
            'sessiontoken': enc_token,
            'expiry':       base.iso8601_from_unix_ts_ms(self.expiry_unix_ts_ms),
            'status':       str(self.status),
            'test':         self.test,
        }
        return result

    def developer_payload(self, gateway_env: env.Env) -> str:
        result = json.dumps({'ws': self.to_client(gateway_env)})
        return result

@dataclasses.dataclass
class WSResponse:
    status: int                    = 0
    body:   base.JSONObject | None = None

def _typed(d: base.JSONObject, key: str, kind: type, default: typing.Any) -> typing.Any:
    value = d.get(key)
    result = value if isinstance(value, kind) and not (kind is int and isinstance(value, bool)) else default
    return result

def ws_user_from_json(d: base.JSONObject) -> WSUser:
    result = WSUser(user_id             = str(d.get('user_id') or ''),
                    session_auth_hash   = _typed(d, 'session_auth_hash', str, ''),
                    username            = _typed(d, 'username', str, ''),
                    traffic_used        = _typed(d, 'traffic_used', int, -1),
                    traffic_max         = _typed(d, 'traffic_max', int, -2),
                    status              = _typed(d, 'status', int, -1),
                    email               = _typed(d, 'email', str, None),
                    email_status        = _typed(d, 'email_status', int, -1),
                    billing_plan_id     = _typed(d, 'billing_plan_id', int, -1),
                    rebill              = _typed(d, 'rebill', int, -1),
                    premium_expiry_date = _typed(d, 'premium_expiry_date', str, ''),
                    is_premium          = _typed(d, 'is_premium', int, 0) == 1,
                    reg_date            = _typed(d, 'reg_date', int, 0),
                    last_reset          = _typed(d, 'last_reset', str, None),
                    loc_rev             = _typed(d, 'loc_rev', int, None),
                    loc_hash            = _typed(d, 'loc_hash', str, None))
    return result

def status_of(user: WSUser | None, now_unix_ts_ms: int) -> EntitlementStatus:
    result = EntitlementStatus.Unknown
    if user is not None:
        if user.status == WS_STATUS_BANNED:
            result = EntitlementStatus.Banned
        elif base.days_until(user.expiry_unix_ts_ms, now_unix_ts_ms) >= 0:
            result = EntitlementStatus.Valid
        else:
            result = EntitlementStatus.Expired
    return result

def plan_for_expiry(expiry_unix_ts_ms: int, since_unix_ts_ms: int, test: bool) -> tuple[Plan, int]:
    '''
    Size a purchase on the third party so it lasts until `expiry_unix_ts_ms`. Returns the plan and
    how many times it has to be applied, e.g. (Month, 3) for a 3 month subscription. (Unknown, 0)
    means the expiry is too close to provision for, an expiry in the past raises.
    '''
    months = base.months_until(expiry_unix_ts_ms, since_unix_ts_ms)
    days   = base.days_until(expiry_unix_ts_ms, since_unix_ts_ms)
    result = (Plan.Unknown, 0)
    if months > 9:
        result = (Plan.Year, 1)
    elif months > 0:
        result = (Plan.Month, months)
    else:
        if days < 0:
            raise BrokerError(f'Plan expired at {base.readable_unix_ts_ms(expiry_unix_ts_ms)}, cannot provision')
        if days >= 10:
            result = (Plan.Month, 1)
        elif days == 1 and test:
            # NOTE: Anywhere between 1s and 1 day left, in production this is Google's silent grace
            # period and is not provisioned
            result = (Plan.Month, 1)
    return result

def _request(method: str, url: str, headers: dict[str, str]) -> WSResponse:
    result = WSResponse()
    r      = http.request(method, url, headers=headers)
    result.status = r.status
    try:
        body = json.loads(r.data.decode('utf-8')) if r.data else None
        if isinstance(body, dict):
            result.body = typing.cast(base.JSONObject, body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        pass
    return result

def _wl_headers(ctx: env.ExecCtx) -> tuple[str, dict[str, str]]:
    api_url, wl_id, wl_token = ctx.env.ws_api(ctx.test)
    result = (api_url, {'X-WS-WL-ID': wl_id, 'X-WS-WL-Token': wl_token})
    return result

def _response_data(r: WSResponse) -> base.JSONObject | None:
    result = None
    if r.body is not None and isinstance(r.body.get('data'), dict):
        result = typing.cast(base.JSONObject, r.body['data'])
    return result

def ws_create_user(ctx: env.ExecCtx, plan: Plan) -> WSUser:
    api_url, headers = _wl_headers(ctx)
    try:
        r = _request('POST', f'{api_url}Users?session_type_id={SESSION_TYPE_ID}&plan={plan}', headers)
    except urllib3.exceptions.HTTPError as e:
        raise BrokerError(f'Create user failed: {e}') from e

    if r.status < 200 or r.status >= 300:
        log.warning(f'Create user rejected: {r.status} {base.safe_dump_dict_keys_or_data(r.body)}')
        raise BrokerError(f'Create user failed: {r.status}')

    data = _response_data(r)
    if data is None:
        raise BrokerError('Create user response had no data')

    result = ws_user_from_json(data)
    if len(result.user_id) == 0 or len(result.session_auth_hash) == 0:
        raise BrokerError('Create user response is missing the user id or session')
    return result

def ws_session_status(ctx: env.ExecCtx, sessiontoken: str) -> tuple[EntitlementStatus, WSUser | None]:
    '''Never raises, anything that isn't a definitive answer from the third party is Unknown'''
    result: tuple[EntitlementStatus, WSUser | None] = (EntitlementStatus.Unknown, None)
    try:
        api_url, _ = _wl_headers(ctx)
        r          = _request('GET', f'{api_url}Session', {'Authorization': f'Bearer {sessiontoken}'})
        data       = _response_data(r)
        if 200 <= r.status < 300 and data is not None:
            user   = ws_user_from_json(data)
            result = (status_of(user, base.now_unix_ts_ms()), user)
        elif r.status >= 400 and r.body is not None:
            error_code = r.body.get('errorCode')
            log.warning(f'Session status {r.status}, error code {error_code}')
            if error_code in (ERROR_CODE_INVALID, ERROR_CODE_SESSION):
                result = (EntitlementStatus.Invalid, None)
    except (urllib3.exceptions.HTTPError, base.ConfigError) as e:
        log.error(f'Session status check failed: {e}')
    return result

def ws_update_user(ctx: env.ExecCtx, sessiontoken: str, plan: Plan) -> None:
    '''Each call extends the account by one `plan` from its expiry (or from now if it lapsed)'''
    api_url, headers         = _wl_headers(ctx)
    headers['Authorization'] = f'Bearer {sessiontoken}'
    try:
        r = _request('PUT', f'{api_url}Users?plan={plan}&delete_credentials=0', headers)
    except urllib3.exceptions.HTTPError as e:
        raise BrokerError(f'Update user failed: {e}') from e

    data = _response_data(r)
    if r.status < 200 or r.status >= 300 or data is None or data.get('success') != 1:
        raise BrokerError(f'Update user to {plan} was not successful: {r.status} {base.safe_dump_dict_keys_or_data(r.body)}')

def ws_delete_user(ctx: env.ExecCtx, sessiontoken: str) -> bool:
    api_url, headers         = _wl_headers(ctx)
    headers['Authorization'] = f'Bearer {sessiontoken}'
    for attempt in DELETE_BACKOFF_S:
        time.sleep(attempt)
        try:
            r = _request('DELETE', f'{api_url}Users', headers)
            if 200 <= r.status < 300:
                return True
            log.warning(f'Delete user attempt {attempt} failed: {r.status}')
            # NOTE: A session the third party already considers invalid is as good as deleted
            if r.status == 403 and r.body is not None and r.body.get('errorCode') == ERROR_CODE_INVALID:
                return True
        except urllib3.exceptions.HTTPError as e:
            log.error(f'Delete user attempt {attempt} error: {e}')
    return False

def creds(ctx: env.ExecCtx, sql_conn: sqlite3.Connection | None, cid: str, op: str = 'get') -> Entitlement | None:
    '''
    Load and decrypt the stored credential for `cid` and check it with the third party. Returns
    None when there is no credential, or when the third party reports it invalid in which case the
    stale row is deleted. Raises BrokerError if the stored credential can't be decrypted.
    '''
    row = backend.get_credential(sql_conn, cid)
    if row is None or len(row.userid) == 0 or len(row.sessiontoken) == 0:
        return None

    aad   = cipher.storage_aad(row.ctime_unix_ts_ms, ctx.env.aad_cutover_unix_ts_ms)
    token = cipher.decrypt_from_storage(ctx.env, cid, row.userid, aad, row.sessiontoken)
    if token is None:
        raise BrokerError(f'Failed to {op} decrypt credential for {cid}')

    status, user = ws_session_status(ctx, token)
    if status == EntitlementStatus.Invalid:
        deleted = backend.delete_credential(sql_conn, cid)
        log.warning(f'Cannot {op} credential for {cid}, third party reports it invalid; row deleted? {deleted.success}')
        return None

    result = Entitlement(cid               = cid,
                         sessiontoken      = token,
                         expiry_unix_ts_ms = user.expiry_unix_ts_ms if user else 0,
                         status            = status,
                         test              = ctx.test)
    return result

def _provision(ctx: env.ExecCtx, expiry_unix_ts_ms: int, requested_plan: str) -> WSUser:
    plan, count = plan_for_expiry(expiry_unix_ts_ms, base.now_unix_ts_ms(), ctx.test)
    log.info(f'New credential until {base.readable_unix_ts_ms(expiry_unix_ts_ms)}; asked: {requested_plan}, assigned: {plan} x {count}; {ctx.tag()}')
    if plan == Plan.Unknown or count <= 0:
        raise BrokerError('Cannot create entitlement, subscription is expiring imminently')

    result = ws_create_user(ctx, plan)
    if count > 1:
        try:
            for _ in range(count - 1):
                ws_update_user(ctx, result.session_auth_hash, plan)
        except BrokerError:
            deleted = ws_delete_user(ctx, result.session_auth_hash)
            log.error(f'Extending new user {result.user_id} to {plan} x {count} failed; deleted? {deleted}')
            raise
        _, refreshed = ws_session_status(ctx, result.session_auth_hash)
        if refreshed is not None:
            result.premium_expiry_date = refreshed.premium_expiry_date
            result.status              = refreshed.status
    return result

def maybe_update(ctx: env.ExecCtx, sql_conn: sqlite3.Connection | None, ent: Entitlement, sub_expiry_unix_ts_ms: int, requested_plan: str) -> Entitlement:
    '''
    Extend the entitlement forward so that it covers `sub_expiry_unix_ts_ms`. Never shortens an
    entitlement, a client that stopped paying keeps what it has until it lapses upstream.
    '''
    # NOTE: Google Play allows a 1 day grace after expiry, within that the existing account is fine
    if ent.expiry_unix_ts_ms >= sub_expiry_unix_ts_ms - base.MILLISECONDS_IN_DAY:
        return ent

    plan, count = plan_for_expiry(sub_expiry_unix_ts_ms, ent.expiry_unix_ts_ms, ctx.test)
    log.info(f'Update credential for {ent.cid} until {base.readable_unix_ts_ms(sub_expiry_unix_ts_ms)} from {base.readable_unix_ts_ms(ent.expiry_unix_ts_ms)}; asked: {requested_plan}, assigned: {plan} x {count}')
    if plan == Plan.Unknown or count <= 0:
        raise BrokerError(f'Cannot update entitlement for {ent.cid}, subscription is expiring soon')

    for _ in range(count):
        ws_update_user(ctx, ent.sessiontoken, plan)

    status, user = ws_session_status(ctx, ent.sessiontoken)
    _            = backend.touch_credential(sql_conn, ent.cid, base.now_unix_ts_ms())
    result       = Entitlement(cid               = ent.cid,
                               sessiontoken      = ent.sessiontoken,
                               expiry_unix_ts_ms = user.expiry_unix_ts_ms if user else ent.expiry_unix_ts_ms,
                               status            = status,
                               test              = ctx.test)
    return result

def get_or_create_entitlement(ctx:               env.ExecCtx,
                              sql_conn:          sqlite3.Connection | None,
                              cid:               str,
                              expiry_unix_ts_ms: int,
                              plan:              str,
                              renew:             bool       = True,
                              purchase_token:    str | None = None,
                              sid:               str | None = None) -> Entitlement:
    ent = creds(ctx, sql_conn, cid)
    if ent is None:
        user       = _provision(ctx, expiry_unix_ts_ms, plan)
        now        = base.now_unix_ts_ms()
        aad        = cipher.storage_aad(now, ctx.env.aad_cutover_unix_ts_ms)
        enc_token  = cipher.encrypt_for_storage(ctx.env, cid, user.user_id, aad, user.session_auth_hash)
        if enc_token is None:
            deleted = ws_delete_user(ctx, user.session_auth_hash)
            raise BrokerError(f'Failed to encrypt credential for {cid}; new user {user.user_id} deleted? {deleted}')

        inserted = backend.insert_credential(sql_conn, cid, user.user_id, enc_token, now, purchase_token=purchase_token, sid=sid)
        if inserted.success:
            ent = Entitlement(cid               = cid,
                              sessiontoken      = user.session_auth_hash,
                              expiry_unix_ts_ms = user.expiry_unix_ts_ms,
                              status            = status_of(user, now),
                              test              = ctx.test)
        else:
            # NOTE: Someone else stored a credential for this client first, use theirs and remove
            # the session we created so it isn't orphaned upstream
            ent = creds(ctx, sql_conn, cid)
            if ent is None or ent.sessiontoken != user.session_auth_hash:
                deleted = ws_delete_user(ctx, user.session_auth_hash)
                log.error(f'Insert or get credential for {cid} failed, new user {user.user_id} deleted? {deleted}; {plan}')

    if ent is None:
        raise BrokerError(f'Insert or get credential for {cid} on {plan} failed')

    if ent.status in (EntitlementStatus.Banned, EntitlementStatus.Unknown):
        return ent

    if ent.status == EntitlementStatus.Expired or renew:
        was_expired = ent.status == EntitlementStatus.Expired
        try:
            ent = maybe_update(ctx, sql_conn, ent, expiry_unix_ts_ms, plan)
        except BrokerError as e:
            if was_expired:
                raise
            log.error(f'Renewing entitlement for {cid} ({ent.status}) failed, keeping it: {e}')
    return ent

def delete_entitlement(ctx: env.ExecCtx, sql_conn: sqlite3.Connection | None, cid: str) -> None:
    ent = None
    try:
        ent = creds(ctx, sql_conn, cid, op='delete')
    except BrokerError as e:
        log.error(f'Reading credential for {cid} to delete failed: {e}')
    if ent is None:
        return

    if ent.status == EntitlementStatus.Banned:
        raise BrokerError(f'Cannot delete banned user {cid}')

    if not ws_delete_user(ctx, ent.sessiontoken):
        raise BrokerError(f'Could not delete third-party session for {cid}')

    deleted = backend.delete_credential(sql_conn, cid)
    if not deleted.success:
        raise BrokerError(f'DB delete of credential for {cid} failed ({ent.status})')
