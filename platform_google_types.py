'''
Type definitions for data structures used in the Google APIs and the catalogue of Play products
that grant an entitlement
'''

import dataclasses
import traceback
from enum import IntEnum, StrEnum
import typing_extensions

from google.protobuf.internal.well_known_types import Timestamp

import base

# RFC 3339, where generated output will always be Z-normalized and use 0, 3, 6 or 9 fractional
# digits. Offsets other than "Z" are also accepted. Examples: "2014-10-02T15:01:23Z",
# "2014-10-02T15:01:23.045123456Z" or "2014-10-02T15:01:23+05:30".
class GoogleTimestamp(Timestamp):
    rfc3339:           str = ''
    unix_milliseconds: int = 0

    def __init__(self, rfc3339_timestamp: str, err: base.ErrorSink):
        self.rfc3339 = rfc3339_timestamp
        try:
            self.FromJsonString(rfc3339_timestamp)
            self.unix_milliseconds = self.ToMilliseconds()
        except ValueError:
            err.msg_list.append(f'Failed to parse timestamp "{rfc3339_timestamp}": {traceback.format_exc()}')

    @typing_extensions.override
    def __repr__(self):
        return f"GoogleTimestamp('{self.rfc3339}', unix_ms={self.unix_milliseconds})"

class SubscriptionNotificationType(IntEnum):
    NIL                           = 0 # Sentinel value, never used except for zero-initialised objects
    RECOVERED                     = 1 # Recovered from account hold.
    RENEWED                       = 2 # Active subscription was renewed.
    CANCELED                      = 3 # Subscription was in/voluntarily cancelled. It is voluntary if the user cancels.
    PURCHASED                     = 4 # New subscription was purchased.
    ON_HOLD                       = 5 # Subscription has entered account hold (if enabled).
    IN_GRACE_PERIOD               = 6 # Subscription has entered grace period (if enabled).
    # User has restored their subscription from Play > Account > Subscriptions. The subscription was
    # canceled but had not expired yet when the user restores.
    RESTARTED                     = 7
    PRICE_CHANGE_CONFIRMED        = 8  # @deprecated Subscription price change has successfully been confirmed by the user.
    DEFERRED                      = 9  # Subscription's recurrence time has been extended.
    PAUSED                        = 10 # Subscription has been paused.
    PAUSE_SCHEDULE_CHANGED        = 11 # Subscription pause schedule has been changed.
    REVOKED                       = 12 # Subscription has been revoked from the user before the expiration time.
    EXPIRED                       = 13 # Subscription has expired.
    PRICE_CHANGE_UPDATED          = 19 # Subscription item's price change details are updated.
    PENDING_PURCHASE_CANCELED     = 20 # Pending transaction of a subscription has been canceled.
    PRICE_STEP_UP_CONSENT_UPDATED = 22

class OneTimeProductNotificationType(IntEnum):
    NIL       = 0
    PURCHASED = 1 # A one-time product was successfully purchased by a user.
    CANCELED  = 2 # A pending one-time product purchase has been canceled by the user.

class ProductType(IntEnum): # Product types for voided purchases
    NIL          = 0 # Sentinel value, never used except for zero-initialised objects
    SUBSCRIPTION = 1 # A subscription purchase has been voided.
    ONE_TIME     = 2 # A one-time purchase has been voided.

class RefundType(IntEnum): # Refund types for voided purchases
    NIL                           = 0 # Sentinel value, never used except for zero-initialised objects
    FULL_REFUND                   = 1
    # The purchase has been partially voided by a quantity-based partial refund, applicable only to
    # multi-quantity purchases. A purchase can be partially voided multiple times.
    QUANTITY_BASED_PARTIAL_REFUND = 2

class SubscriptionsV2State(StrEnum):
    """Subscriptions V2 subscription state types"""
    UNSPECIFIED = "SUBSCRIPTION_STATE_UNSPECIFIED"

    # Subscription was created but awaiting payment during signup. In this state, all items are
    # awaiting payment.
    PENDING = "SUBSCRIPTION_STATE_PENDING"

    # - (1) If the subscription is an auto renewing plan, at least one item is autoRenewEnabled and
    #   not expired.
    # - (2) If the subscription is a prepaid plan, at least one item is not expired.
    ACTIVE = "SUBSCRIPTION_STATE_ACTIVE"

    # The state is only available when the subscription is an auto renewing plan, all items are in a
    # paused state.
    PAUSED = "SUBSCRIPTION_STATE_PAUSED"

    # The state is only available when the subscription is an auto renewing plan, all items are in
    # a grace period.
    IN_GRACE_PERIOD = "SUBSCRIPTION_STATE_IN_GRACE_PERIOD"

    # The state is only available when the subscription is an auto renewing plan, all items are on
    # hold.
    ON_HOLD = "SUBSCRIPTION_STATE_ON_HOLD"

    # Subscription is canceled but not expired yet. The state is only available when the
    # subscription is an auto renewing plan, all items have autoRenewEnabled set to false.
    CANCELED = "SUBSCRIPTION_STATE_CANCELED"

    # All items have expiryTime in the past.
    EXPIRED = "SUBSCRIPTION_STATE_EXPIRED"

    # Pending transaction for subscription is canceled. If this pending purchase was for an existing
    # subscription, use linkedPurchaseToken to get the current state of that subscription.
    PENDING_PURCHASE_CANCELED = "SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED"

class AcknowledgementState(StrEnum):
    """Shared by subscriptionsv2 and productsv2 purchases"""
    UNSPECIFIED  = "ACKNOWLEDGEMENT_STATE_UNSPECIFIED"
    PENDING      = "ACKNOWLEDGEMENT_STATE_PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED"

class ProductPurchaseState(StrEnum):
    UNSPECIFIED = "PURCHASE_STATE_UNSPECIFIED"
    PURCHASED   = "PURCHASED"
    CANCELLED   = "CANCELLED"
    PENDING     = "PENDING"  # Awaiting payment, e.g. cash at a convenience store

@dataclasses.dataclass
class SubscriptionsV2CanceledState:
    """Only one of the fields will be set at a time"""
    # Subscription was canceled by user, the time of the cancellation in unix milliseconds. The user
    # might still have access to the subscription after this time.
    user_cancel_unix_ts_ms:           int | None = None
    user_initiated_cancellation:      bool = False
    # Subscription was canceled by the system, for example because of a billing problem.
    system_initiated_cancellation:    bool = False
    # Subscription was canceled by the developer.
    developer_initiated_cancellation: bool = False
    # Subscription was replaced by a new subscription (upgrade/downgrade).
    replacement_cancellation:         bool = False

@dataclasses.dataclass
class SubscriptionV2DataLineItem:
    # The purchased product ID (for example, 'standard.tier').
    product_id:                 str                    = ''

    # Timestamp of when the subscription will expire/renew. Deferred items (an item that will
    # replace the current one at its next renewal) have no expiry yet.
    expiry_time:                GoogleTimestamp | None = None

    # Purchase order ID, it is not set if the item is not owned by the user yet (e.g. the item being
    # deferred/replaced to).
    latest_successful_order_id: str | None             = None
    auto_renew_enabled:         bool                   = False
    base_plan_id:               str | None             = None

    # Set when this item is going to be replaced by `deferred_item_replacement` at its next renewal
    deferred_item_replacement:  str | None             = None

@dataclasses.dataclass
class SubscriptionV2Data:
    """Status of a user's subscription purchase."""
    line_items:             list[SubscriptionV2DataLineItem] = dataclasses.field(default_factory=list)

    # Time at which the subscription was granted. Not set for pending subscriptions (subscription
    # was created but awaiting payment during signup).
    start_time:             GoogleTimestamp | None = None
    subscription_state:     SubscriptionsV2State   = SubscriptionsV2State.UNSPECIFIED

    # The purchase token of the old subscription if this subscription is one of the following:
    # - Re-signup of a canceled but non-lapsed subscription
    # - Upgrade/downgrade from a previous subscription.
    # - Convert from prepaid to auto renewing subscription.
    # - Convert from an auto renewing subscription to prepaid.
    # - Topup a prepaid subscription.
    linked_purchase_token:  str | None = None

    # Cancel metadata, set if `subscription_state` is `SUBSCRIPTION_STATE_CANCELED` or
    # `SUBSCRIPTION_STATE_EXPIRED`.
    canceled_state_context: SubscriptionsV2CanceledState | None = None

    test_purchase:          bool = False # Set if this subscription purchase is a test purchase
    acknowledgement_state:  AcknowledgementState = AcknowledgementState.UNSPECIFIED

    # The client id the app attached to the purchase at checkout
    obfuscated_external_account_id: str = ''

    # The response as returned by Google (minus PII), persisted as the purchase's metadata
    raw:                    base.JSONObject = dataclasses.field(default_factory=dict)

    @property
    def acknowledged(self) -> bool:
        return self.acknowledgement_state == AcknowledgementState.ACKNOWLEDGED

    @property
    def replaced(self) -> bool:
        result = self.canceled_state_context is not None and self.canceled_state_context.replacement_cancellation
        return result

@dataclasses.dataclass
class ProductV2LineItem:
    product_id:         str = ''
    # The "base plan" equivalent of a one-time product
    purchase_option_id: str = ''

@dataclasses.dataclass
class ProductPurchaseV2Data:
    """Status of a user's one-time product purchase (purchases.productsv2)"""
    line_items:                     list[ProductV2LineItem] = dataclasses.field(default_factory=list)
    purchase_state:                 ProductPurchaseState    = ProductPurchaseState.UNSPECIFIED
    test_purchase:                  bool                    = False
    order_id:                       str                     = ''
    obfuscated_external_account_id: str                     = ''
    # Not present until the payment is complete
    purchase_completion_time:       GoogleTimestamp | None  = None
    acknowledgement_state:          AcknowledgementState    = AcknowledgementState.UNSPECIFIED
    raw:                            base.JSONObject         = dataclasses.field(default_factory=dict)

    @property
    def acknowledged(self) -> bool:
        return self.acknowledgement_state == AcknowledgementState.ACKNOWLEDGED

    @property
    def paid(self) -> bool:
        return self.purchase_state == ProductPurchaseState.PURCHASED

    @property
    def pending(self) -> bool:
        return self.purchase_state == ProductPurchaseState.PENDING

# NOTE: Play catalogue
MONTHLY_TEST_PRODUCT_ID: str = 'proxy_monthly_subscription_test'
ANNUAL_TEST_PRODUCT_ID:  str = 'proxy_annual_subscription_test'
STANDARD_PRODUCT_ID:     str = 'standard.tier'
PRO_PRODUCT_ID:          str = 'pro.tier'
ONETIME_PRODUCT_ID:      str = 'onetime.tier'
MONTHLY_BASE_PLAN_ID:    str = 'proxy-monthly'
YEARLY_BASE_PLAN_ID:     str = 'proxy-yearly'
TWO_YEARLY_BASE_PLAN_ID: str = 'proxy-yearly-2'
FIVE_YEARLY_BASE_PLAN_ID: str = 'proxy-yearly-5'

KNOWN_PRODUCTS: frozenset[str] = frozenset([
    MONTHLY_TEST_PRODUCT_ID,
    ANNUAL_TEST_PRODUCT_ID,
    STANDARD_PRODUCT_ID,
    PRO_PRODUCT_ID,
    ONETIME_PRODUCT_ID,
])

REFUND_WINDOW_DAYS: dict[str, int] = {
    MONTHLY_BASE_PLAN_ID:     3,
    YEARLY_BASE_PLAN_ID:      7,
    TWO_YEARLY_BASE_PLAN_ID:  14,
    FIVE_YEARLY_BASE_PLAN_ID: 28,
}
DEFAULT_REFUND_WINDOW_DAYS: int = 3

@dataclasses.dataclass
class EntitlementIntent:
    """
    What a Play purchase entitles the client to: a product + base plan and the period it is paid
    for. A subscription item that hasn't started (deferred) has no expiry.
    """
    product_id:        str        = ''
    base_plan_id:      str        = ''
    start_unix_ts_ms:  int | None = None
    expiry_unix_ts_ms: int | None = None

    @property
    def deferred(self) -> bool:
        return self.expiry_unix_ts_ms is None

    @property
    def plan(self) -> str:
        if self.deferred:
            return 'deferred'
        if 'monthly' in self.base_plan_id:
            return 'month'
        if 'yearly' in self.base_plan_id:
            return 'year'
        if 'month' in self.product_id:
            return 'month'
        if 'year' in self.product_id:
            return 'year'
        return 'unknown'

    @property
    def refund_window_days(self) -> int:
        result = REFUND_WINDOW_DAYS.get(self.base_plan_id, DEFAULT_REFUND_WINDOW_DAYS)
        return result

    def within_refund_window(self, now_unix_ts_ms: int) -> bool:
        start  = self.start_unix_ts_ms if self.start_unix_ts_ms is not None else 0
        days   = (now_unix_ts_ms - start) / base.MILLISECONDS_IN_DAY
        result = days <= self.refund_window_days
        return result

    def until(self, start_unix_ts_ms: int | None, expiry_unix_ts_ms: int | None) -> 'EntitlementIntent':
        result = EntitlementIntent(product_id        = self.product_id,
                                   base_plan_id      = self.base_plan_id,
                                   start_unix_ts_ms  = start_unix_ts_ms,
                                   expiry_unix_ts_ms = expiry_unix_ts_ms)
        return result

    def since(self, start_unix_ts_ms: int) -> 'EntitlementIntent':
        """Entitlement for a one-time purchase of this plan made at `start_unix_ts_ms`"""
        months = {FIVE_YEARLY_BASE_PLAN_ID: 12 * 5,
                  TWO_YEARLY_BASE_PLAN_ID:  12 * 2,
                  YEARLY_BASE_PLAN_ID:      12,
                  MONTHLY_BASE_PLAN_ID:     1}.get(self.base_plan_id)
        if months is None:
            raise ValueError(f'Unknown base plan {self.base_plan_id} for {self.product_id}')
        result = self.until(start_unix_ts_ms, base.add_months_to_unix_ts_ms(start_unix_ts_ms, months))
        return result

KNOWN_BASE_PLANS: dict[str, EntitlementIntent] = {
    MONTHLY_BASE_PLAN_ID:     EntitlementIntent(STANDARD_PRODUCT_ID, MONTHLY_BASE_PLAN_ID),
    YEARLY_BASE_PLAN_ID:      EntitlementIntent(STANDARD_PRODUCT_ID, YEARLY_BASE_PLAN_ID),
    TWO_YEARLY_BASE_PLAN_ID:  EntitlementIntent(ONETIME_PRODUCT_ID,  TWO_YEARLY_BASE_PLAN_ID),
    FIVE_YEARLY_BASE_PLAN_ID: EntitlementIntent(ONETIME_PRODUCT_ID,  FIVE_YEARLY_BASE_PLAN_ID),
}

def json_dict_require_google_timestamp(d: dict[str, base.JSONValue], key: str, err: base.ErrorSink) -> GoogleTimestamp:
    timestamp_str = base.json_dict_require_str(d, key, err)
    return GoogleTimestamp(timestamp_str, err)

def json_dict_optional_google_timestamp(d: dict[str, base.JSONValue], key: str, err: base.ErrorSink) -> GoogleTimestamp | None:
    """Missing and empty strings are both treated as unset"""
    result        = None
    timestamp_str = base.json_dict_optional_str(d, key, err)
    if timestamp_str:
        result = GoogleTimestamp(timestamp_str, err)
    return result

def json_dict_optional_google_empty_object_bool(d: dict[str, base.JSONValue], key: str, err: base.ErrorSink) -> bool:
    """Google signals some flags with the presence of an (empty) object, e.g. "testPurchase": {}"""
    result = False
    if key in d:
        if isinstance(d[key], dict):
            result = True
        else:
            err.msg_list.append(f'Key "{key}" value was not an object: "{base.safe_dump_arbitrary_value_or_type(d.get(key))}"')
    return result
