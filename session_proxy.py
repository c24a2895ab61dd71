'''
Third-party session proxy

Forwards a small allowlist of end-client requests to the third-party VPN API. Clients only ever
hold their session secret encrypted (see `cipher.encrypt_for_client`), the proxy decrypts the
bearer on the way out and re-encrypts any session secret in the response on the way back.

The `rpn` query parameter selects the upstream host, the `cid` query parameter names the client
whose key decrypts the bearer.
'''
import re
import json
import typing
import logging
import dataclasses
import urllib.parse

import urllib3

import env
import cipher

log = logging.Logger('PROXY')

ALLOWED_PATH_PREFIXES: tuple[str, ...] = ('/wgconfigs/init', '/wgconfigs/connect', '/session', '/portmap', '/serverlist/mob-v2/')
UPSTREAM_HOSTS:        dict[str, str]  = {
    'ws':           'api.windscribe.com',
    'wstest':       'api-staging.windscribe.com',
    'wsassets':     'assets.windscribe.com',
    'wsassetstest': 'assets-staging.windscribe.com',
    'wstestassets': 'assets-staging.windscribe.com',
}

# NOTE: Query parameters meant for the gateway, never forwarded upstream
GATEWAY_QUERY_PARAMS:  frozenset[str]  = frozenset({'rpn', 'cid'})

# NOTE: Hop-by-hop and gateway-set headers, never forwarded upstream
DROPPED_HEADERS:       frozenset[str]  = frozenset({'host', 'authorization', 'content-length', 'connection', 'accept-encoding', 'transfer-encoding'})

# NOTE: A plaintext session secret is "id:typ:epoch:sig1:sig2", ciphertext is hex
PLAINTEXT_BEARER_MIN_PARTS: int = 5
CID_PATTERN                     = re.compile(r'^[0-9a-f]{64}$')

http = urllib3.PoolManager(timeout=urllib3.Timeout(connect=5, read=30), retries=False)

@dataclasses.dataclass
class ProxyResponse:
    status:       int   = 200
    body:         bytes = b''
    content_type: str   = 'text/plain'

@dataclasses.dataclass
class Bearer:
    cid:          str | None = None
    token:        str | None = None   # Plaintext session secret sent upstream
    enc_token:    str | None = None   # As the client sent it, if it was encrypted
    needs_auth:   bool       = False
    must_encrypt: bool       = False

def is_allowlisted(path: str) -> bool:
    lowered = path.lower()
    result  = any(lowered.startswith(it) for it in ALLOWED_PATH_PREFIXES)
    return result

def needs_auth(rpn: str) -> bool:
    '''API hosts need the client's session secret, asset hosts don't'''
    result = rpn.startswith('ws') and 'assets' not in rpn
    return result

def is_sensitive(path: str) -> bool:
    # NOTE: Responses on /Session carry the session secret
    result = '/Session' in path
    return result

def bearer_for(gateway_env: env.Env, rpn: str, cid: str | None, authorization: str | None) -> Bearer:
    result = Bearer(cid=cid if cid is not None and CID_PATTERN.match(cid) else None)
    if not needs_auth(rpn):
        return result

    result.needs_auth = True
    parts             = (authorization or '').split(' ')
    if len(parts) < 2 or parts[0] != 'Bearer' or len(parts[1]) == 0:
        log.debug(f'No bearer for {rpn}')
        return result

    bearer = parts[1]
    if len(bearer.split(':')) >= PLAINTEXT_BEARER_MIN_PARTS:
        # NOTE: The client holds the plaintext secret, nothing to hide from it on the way back
        result.token = bearer
        return result

    if result.cid is None:
        log.debug(f'Encrypted bearer without a valid cid for {rpn}')
        return result

    result.enc_token    = bearer
    result.must_encrypt = True
    result.token        = cipher.decrypt_from_client(gateway_env, result.cid, bearer)
    if result.token is None:
        log.warning(f'Decrypting bearer for {result.cid} failed')
    return result

def upstream_url(rpn: str, path: str, query: list[tuple[str, str]]) -> str | None:
    host = UPSTREAM_HOSTS.get(rpn)
    if host is None:
        return None
    forwarded = [(k, v) for k, v in query if k not in GATEWAY_QUERY_PARAMS]
    result    = f'https://{host}{urllib.parse.quote(path)}'
    if len(forwarded) > 0:
        result += '?' + urllib.parse.urlencode(forwarded)
    return result

def _reencrypt_session(gateway_env: env.Env, bearer: Bearer, body: bytes) -> bytes:
    # NOTE: j = { data: { ... session_auth_hash ... }, metadata: { ... } }
    j = json.loads(body)
    if not isinstance(j, dict):
        raise ValueError('session response is not a JSON object')

    data = j.get('data')
    if not isinstance(data, dict):
        data = {}

    session_auth_hash  = data.get('session_auth_hash')
    has_sensitive_data = isinstance(session_auth_hash, str) and len(session_auth_hash) > 0
    new_sensitive_data = has_sensitive_data and session_auth_hash != bearer.token
    log.debug(f'Session: enc/sen/diff? {bearer.must_encrypt} {has_sensitive_data} {new_sensitive_data}')

    if bearer.must_encrypt and new_sensitive_data:
        assert bearer.cid is not None
        enc_token = cipher.encrypt_for_client(gateway_env, bearer.cid, typing.cast(str, session_auth_hash))
        if enc_token is None:
            raise ValueError('encrypting new session secret failed')
        data['session_auth_hash'] = enc_token
    elif bearer.must_encrypt:
        data['session_auth_hash'] = bearer.enc_token
    else:
        _ = data.pop('session_auth_hash', None)

    result = json.dumps({'data': data, 'metadata': j.get('metadata') or {}}).encode('utf-8')
    return result

def proxy_session_request(gateway_env: env.Env,
                          method:      str,
                          path:        str,
                          query:       list[tuple[str, str]],
                          headers:     dict[str, str],
                          body:        bytes) -> ProxyResponse:
    '''
    Forward an end-client request upstream. `path` is the upstream path, `query` the request's
    query parameters in order, `headers` the request headers.
    '''
    if not is_allowlisted(path):
        log.warning(f'Not allowlisted: {path}')
        return ProxyResponse(421, b'lost')

    params = dict(query)
    rpn    = params.get('rpn', '')
    url    = upstream_url(rpn, path, query)
    if url is None:
        log.warning(f'Unknown upstream "{rpn}" for {path}')
        return ProxyResponse(421, b'lost')

    authorization = next((v for k, v in headers.items() if k.lower() == 'authorization'), None)
    bearer        = bearer_for(gateway_env, rpn, params.get('cid'), authorization)
    if bearer.needs_auth and (not bearer.token or (bearer.must_encrypt and bearer.cid is None)):
        return ProxyResponse(401, b'needs cid or auth')

    forwarded_headers = {k: v for k, v in headers.items() if k.lower() not in DROPPED_HEADERS}
    if bearer.token:
        forwarded_headers['Authorization'] = f'Bearer {bearer.token}'

    sensitive = is_sensitive(path)
    test      = 'test' in rpn
    log.debug(f'{method} {url} (sensitive? {sensitive} / encrypted? {bearer.must_encrypt} / test? {test})')

    try:
        r            = http.request(method, url, body=body if len(body) > 0 else None, headers=forwarded_headers)
        content_type = r.headers.get('Content-Type', 'application/octet-stream')
        if not sensitive:
            return ProxyResponse(r.status, r.data, content_type)

        if r.status < 200 or r.status >= 300:
            log.warning(f'Session: {r.status}')
            return ProxyResponse(r.status, r.data, content_type)

        result = ProxyResponse(r.status, _reencrypt_session(gateway_env, bearer, r.data), 'application/json')
    except (urllib3.exceptions.HTTPError, ValueError) as e:
        log.error(f'Forwarding {method} {path} failed: {e}')
        result = ProxyResponse(400, f'remote: {e}'.encode('utf-8'))
    return result
