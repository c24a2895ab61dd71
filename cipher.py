'''
Credential cipher

Every key in the gateway is derived from one of the hex encoded root secrets in `env.Env` with
HKDF-SHA256. The HKDF `info` parameter is the SHA-512 of a purpose specific context so that keys
for different purposes (or different clients) can't be linked to each other even though they share
a root secret. The salt is left as zeros.

Two AES-256-GCM shapes are supported:

  Storage  (at rest)  - Key context is b'dbenc' + cid. The nonce is deterministic, the first 12
                        bytes of SHA-256(purpose tag + cid), so a given (purpose, client) always
                        encrypts under the same nonce. Output is hex(ciphertext + tag). Only use it
                        for values that are written once per key, i.e. one session token per
                        client credential row.

  Transport           - Key context is cid + b'encryptforclient'. A random 12 byte nonce is
                        generated on each call and prepended to the output,
                        hex(nonce) + hex(ciphertext + tag).

A third, cross-service key (context b'encryptcrossservice') uses the transport shape with a
coarse date bucket as AAD and is used to hand the TLS bundle to sibling services.

Expected failures (missing or short secrets, malformed hex, tag mismatch) are logged and returned
as None, they are never raised to the caller.
'''
import os
import hmac
import hashlib
import datetime
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

import base
import env

log = logging.Logger('CIPHER')

KEY_SIZE:            int   = 32
SEED_SIZE:           int   = 32
NONCE_SIZE:          int   = 12
TAG_SIZE:            int   = 16
STORAGE_CONTEXT:     bytes = b'dbenc'
CLIENT_CONTEXT:      bytes = b'encryptforclient'
XSVC_CONTEXT:        bytes = b'encryptcrossservice'

# NOTE: AAD binding session tokens to the table and column they live in, the format is
# <len(table)>:<table>.<len(column)>:<column>
SESSIONTOKEN_AAD:    bytes = b'2:ws.12:sessiontoken'

def derive_key(root_secret_hex: str, context: bytes) -> bytes | None:
    result = None
    if len(root_secret_hex) == 0:
        log.error('Key derivation failed, root secret is not configured')
        return result

    if len(context) == 0:
        log.error('Key derivation failed, empty context')
        return result

    try:
        seed = bytes.fromhex(root_secret_hex)
    except ValueError as e:
        log.error(f'Key derivation failed, root secret is not valid hex: {e}')
        return result

    if len(seed) < SEED_SIZE:
        log.error(f'Key derivation failed, root secret was {len(seed)} bytes, need at least {SEED_SIZE}')
        return result

    # NOTE: info is the digest of the context so it is a fixed size for every derivation
    info   = hashlib.sha512(context).digest()
    hkdf   = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=info)
    result = hkdf.derive(seed[:SEED_SIZE])
    return result

def fixed_nonce(purpose_tag: bytes, cid: str) -> bytes | None:
    result = None
    if len(purpose_tag) == 0 or len(cid) == 0:
        log.error('Fixed nonce requires a purpose tag and a client id')
        return result
    try:
        cid_bytes = bytes.fromhex(cid)
    except ValueError:
        log.error(f'Fixed nonce client id was not hex: {base.obfuscate(cid)}')
        return result
    result = hashlib.sha256(purpose_tag + cid_bytes).digest()[:NONCE_SIZE]
    return result

def aead_encrypt(key: bytes, nonce: bytes, aad: bytes | None, plaintext: bytes) -> bytes | None:
    result = None
    try:
        result = AESGCM(key).encrypt(nonce, plaintext, aad)
    except (ValueError, OverflowError) as e:
        log.error(f'AEAD encrypt failed: {e}')
    return result

def aead_decrypt(key: bytes, nonce: bytes, aad: bytes | None, tagged_ciphertext: bytes) -> bytes | None:
    result = None
    try:
        result = AESGCM(key).decrypt(nonce, tagged_ciphertext, aad)
    except InvalidTag:
        log.error('AEAD decrypt failed, authentication tag mismatch')
    except (ValueError, OverflowError) as e:
        log.error(f'AEAD decrypt failed: {e}')
    return result

def storage_aad(created_unix_ts_ms: int, cutover_unix_ts_ms: int) -> bytes | None:
    '''
    Rows written before the cutover were encrypted without AAD and must still decrypt, everything
    after it is bound to the table and column.
    '''
    result = SESSIONTOKEN_AAD if created_unix_ts_ms > cutover_unix_ts_ms else None
    return result

def storage_key(gateway_env: env.Env, cid: str) -> bytes | None:
    result = None
    try:
        cid_bytes = bytes.fromhex(cid)
    except ValueError:
        log.error(f'Storage key client id was not hex: {base.obfuscate(cid)}')
        return result
    result = derive_key(gateway_env.kdf_secret_d1, STORAGE_CONTEXT + cid_bytes)
    return result

def encrypt_for_storage(gateway_env: env.Env, cid: str, purpose_tag: str, aad: bytes | None, plaintext: str) -> str | None:
    result = None
    key    = storage_key(gateway_env, cid)
    nonce  = fixed_nonce(purpose_tag.encode('utf-8'), cid)
    if key is None or nonce is None:
        log.error(f'Storage encrypt for {base.obfuscate(cid)} has no key/nonce')
        return result

    tagged_ciphertext = aead_encrypt(key, nonce, aad, plaintext.encode('utf-8'))
    if tagged_ciphertext is not None:
        result = tagged_ciphertext.hex()
    return result

def decrypt_from_storage(gateway_env: env.Env, cid: str, purpose_tag: str, aad: bytes | None, tagged_ciphertext_hex: str) -> str | None:
    result = None
    key    = storage_key(gateway_env, cid)
    nonce  = fixed_nonce(purpose_tag.encode('utf-8'), cid)
    if key is None or nonce is None:
        log.error(f'Storage decrypt for {base.obfuscate(cid)} has no key/nonce')
        return result

    try:
        tagged_ciphertext = bytes.fromhex(tagged_ciphertext_hex)
    except ValueError:
        log.error(f'Storage decrypt for {base.obfuscate(cid)}, ciphertext was not hex')
        return result

    plaintext = aead_decrypt(key, nonce, aad, tagged_ciphertext)
    if plaintext is not None:
        try:
            result = plaintext.decode('utf-8')
        except UnicodeDecodeError:
            log.error(f'Storage decrypt for {base.obfuscate(cid)}, plaintext was not UTF-8')
    return result

def _encrypt_with_random_nonce(key: bytes, aad: bytes | None, plaintext: bytes) -> str | None:
    result            = None
    nonce             = os.urandom(NONCE_SIZE)
    tagged_ciphertext = aead_encrypt(key, nonce, aad, plaintext)
    if tagged_ciphertext is not None:
        result = nonce.hex() + tagged_ciphertext.hex()
    return result

def _decrypt_with_prepended_nonce(key: bytes, aad: bytes | None, wire_hex: str) -> bytes | None:
    result = None
    try:
        wire = bytes.fromhex(wire_hex)
    except ValueError:
        log.error('Decrypt failed, payload was not hex')
        return result

    if len(wire) < NONCE_SIZE + TAG_SIZE:
        log.error(f'Decrypt failed, payload was {len(wire)} bytes which is too short')
        return result

    result = aead_decrypt(key, wire[:NONCE_SIZE], aad, wire[NONCE_SIZE:])
    return result

def client_key(gateway_env: env.Env, cid: str) -> bytes | None:
    result = None
    try:
        cid_bytes = bytes.fromhex(cid)
    except ValueError:
        log.error(f'Client key id was not hex: {base.obfuscate(cid)}')
        return result
    result = derive_key(gateway_env.kdf_secret_client, cid_bytes + CLIENT_CONTEXT)
    return result

def encrypt_for_client(gateway_env: env.Env, cid: str, plaintext: str) -> str | None:
    result = None
    key    = client_key(gateway_env, cid)
    if key is None:
        log.error(f'Client encrypt for {base.obfuscate(cid)} has no key')
        return result
    result = _encrypt_with_random_nonce(key, None, plaintext.encode('utf-8'))
    return result

def decrypt_from_client(gateway_env: env.Env, cid: str, wire_hex: str) -> str | None:
    result = None
    key    = client_key(gateway_env, cid)
    if key is None:
        log.error(f'Client decrypt for {base.obfuscate(cid)} has no key')
        return result

    plaintext = _decrypt_with_prepended_nonce(key, None, wire_hex)
    if plaintext is not None:
        try:
            result = plaintext.decode('utf-8')
        except UnicodeDecodeError:
            log.error(f'Client decrypt for {base.obfuscate(cid)}, plaintext was not UTF-8')
    return result

def cross_service_aad(unix_ts_ms: int) -> bytes:
    '''
    Date bucket "<weekday>/<month>/<year>" in UTC where Sunday is weekday 0 and January is month 0,
    e.g. Friday 1st Aug 2025 is "5/7/2025".
    '''
    dt      = datetime.datetime.fromtimestamp(unix_ts_ms / 1000.0, tz=datetime.timezone.utc)
    weekday = (dt.weekday() + 1) % 7
    result  = f'{weekday}/{dt.month - 1}/{dt.year}'.encode('utf-8')
    return result

def encrypt_cross_service(gateway_env: env.Env, plaintext: str, unix_ts_ms: int) -> str | None:
    result = None
    key    = derive_key(gateway_env.kdf_secret_xsvc, XSVC_CONTEXT)
    if key is None:
        log.error('Cross-service encrypt has no key')
        return result
    result = _encrypt_with_random_nonce(key, cross_service_aad(unix_ts_ms), plaintext.encode('utf-8'))
    return result

def decrypt_cross_service(gateway_env: env.Env, wire_hex: str, unix_ts_ms: int) -> str | None:
    result = None
    key    = derive_key(gateway_env.kdf_secret_xsvc, XSVC_CONTEXT)
    if key is None:
        log.error('Cross-service decrypt has no key')
        return result
    plaintext = _decrypt_with_prepended_nonce(key, cross_service_aad(unix_ts_ms), wire_hex)
    if plaintext is not None:
        result = plaintext.decode('utf-8', errors='replace')
    return result

def hmac_sign(key: bytes, msg: bytes) -> bytes:
    result = hmac.new(key, msg, hashlib.sha256).digest()
    return result

def hmac_verify(key: bytes, msg: bytes, sig: bytes) -> bool:
    result = hmac.compare_digest(hmac_sign(key, msg), sig)
    return result

def random_hex(n_bytes: int) -> str:
    result = os.urandom(n_bytes).hex()
    return result
