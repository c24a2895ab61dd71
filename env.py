'''
Deployment configuration and the per-invocation execution context.

`Env` holds every secret and setting the gateway needs and is built once by main.py from the INI
file and environment overrides (tests construct it directly). `ExecCtx` is created per webhook
notification or HTTP request and passed explicitly to each function that needs to know which
environment it is operating on, whether the purchase is a test purchase and which obfuscated token
to tag its logs with.
'''
import dataclasses

import base

@dataclasses.dataclass
class Env:
    # NOTE: Hex encoded root secrets, each one must decode to at least 32 bytes
    kdf_secret_d1:             str  = ''   # Keys for credentials stored at rest
    kdf_secret_client:         str  = ''   # Keys for credentials sent to clients
    kdf_secret_xsvc:           str  = ''   # Keys for payloads exchanged with sibling services
    tls_certkey:               str  = ''   # PEM bundle handed out (encrypted) to sibling services

    # NOTE: Third-party VPN session API, production and staging
    ws_api_url:                str  = 'https://api.windscribe.com/'
    ws_wl_id:                  str  = ''
    ws_wl_token:               str  = ''
    ws_test_api_url:           str  = 'https://api-staging.windscribe.com/'
    ws_test_wl_id:             str  = ''
    ws_test_wl_token:          str  = ''

    stripe_api_key:            str  = ''
    stripe_webhook_secret:     str  = ''

    google_package_name:       str  = 'com.celzero.bravedns'
    google_app_credentials:    str  = ''   # Path to the service account JSON

    # NOTE: Policies
    account_ids_immutable:     bool = True
    grace_period_days:         int  = 0
    aad_cutover_unix_ts_ms:    int  = 0    # Credentials created after this are bound with AAD

    def ws_api(self, test: bool) -> tuple[str, str, str]:
        '''Returns the (url, whitelabel id, whitelabel token) triple for the requested environment'''
        if test:
            result = (self.ws_test_api_url, self.ws_test_wl_id, self.ws_test_wl_token)
        else:
            result = (self.ws_api_url, self.ws_wl_id, self.ws_wl_token)
        if len(result[0]) == 0 or len(result[1]) == 0 or len(result[2]) == 0:
            raise base.ConfigError(f'Session API is not configured (test={test})')
        return result

@dataclasses.dataclass
class ExecCtx:
    env:       Env
    test:      bool = False
    obs_token: str  = ''   # Obfuscated purchase token for log correlation

    def tag(self) -> str:
        result = f'{self.obs_token} test? {self.test}' if self.obs_token else f'test? {self.test}'
        return result
