'''
Google Play Developer API

Thin wrappers around the Android Publisher v3 discovery client that the reconciler needs. `init`
builds the client from the configured service account, google-auth refreshes its access token on
demand. HTTP failures are raised as `GoogleAPIError`, malformed responses are reported through the
`base.ErrorSink`.
'''
import typing
import logging

import google.auth.exceptions
import googleapiclient.errors
import googleapiclient.discovery
from google.oauth2 import service_account

import base
from platform_google_types import SubscriptionV2Data, SubscriptionV2DataLineItem, SubscriptionsV2State, \
    SubscriptionsV2CanceledState, AcknowledgementState, ProductPurchaseV2Data, ProductV2LineItem, ProductPurchaseState, \
    json_dict_require_google_timestamp, json_dict_optional_google_timestamp, json_dict_optional_google_empty_object_bool

log = logging.Logger('GOOGLE_API')

SCOPES = ['https://www.googleapis.com/auth/androidpublisher']

# NOTE: Globals set by `init`
credentials:       service_account.Credentials | None = None
publisher_service: typing.Any                         = None
package_name:      str                                = ''

class GoogleAPIError(Exception):
    def __init__(self, msg: str, status: int = 0, details: str = ''):
        super().__init__(f'{msg}: {status} {details}' if status else msg)
        self.status  = status
        self.details = details

def init(app_credentials_path: str, app_package_name: str):
    global credentials, publisher_service, package_name
    credentials       = service_account.Credentials.from_service_account_file(app_credentials_path, scopes=SCOPES)  # pyright: ignore[reportUnknownMemberType]
    publisher_service = googleapiclient.discovery.build('androidpublisher', 'v3', credentials=credentials, cache_discovery=False)  # pyright: ignore[reportUnknownMemberType]
    package_name      = app_package_name

def _purchases() -> typing.Any:
    if publisher_service is None:
        raise base.ConfigError('Google service account credentials are not configured')
    result = publisher_service.purchases()
    return result

def _execute(label: str, request: typing.Any) -> base.JSONObject:
    try:
        response = request.execute()
    except googleapiclient.errors.HttpError as e:
        raise GoogleAPIError(f'{label} failed', e.resp.status, str(e.reason)) from e
    except (google.auth.exceptions.GoogleAuthError, OSError) as e:
        raise GoogleAPIError(f'{label} failed: {e}') from e

    result: base.JSONObject = {}
    if isinstance(response, dict):
        result = typing.cast(base.JSONObject, response)
    return result

def parse_subscription_v2(response: typing.Any, err: base.ErrorSink) -> SubscriptionV2Data | None:
    result = None
    if not isinstance(response, dict):
        err.msg_list.append('Failed to get subscription details, result not a dict')
        return result

    # Delete known PII just in case something logs or persists it
    if 'subscribeWithGoogleInfo' in response:
        del response['subscribeWithGoogleInfo']

    kind = base.json_dict_require_str(response, 'kind', err)
    if kind != 'androidpublisher#subscriptionPurchaseV2':
        err.msg_list.append(f'purchases.subscriptionsv2.get has incorrect kind: {kind}')

    line_items_arr = base.json_dict_require_array(response, 'lineItems', err)
    if err.has():
        return result

    line_items: list[SubscriptionV2DataLineItem] = []
    for index, line_item in enumerate(line_items_arr):
        if not isinstance(line_item, dict):
            err.msg_list.append(f'purchases.subscriptionsv2.get line_item at index {index} not a dict: {base.safe_dump_arbitrary_value_or_type(line_item)}')
            continue

        product_id                 = base.json_dict_require_str(line_item, 'productId', err)
        expiry_time                = json_dict_optional_google_timestamp(line_item, 'expiryTime', err)
        latest_successful_order_id = base.json_dict_optional_str(line_item, 'latestSuccessfulOrderId', err)

        base_plan_id      = None
        offer_details_obj = base.json_dict_optional_obj(line_item, 'offerDetails', err)
        if offer_details_obj is not None:
            base_plan_id = base.json_dict_optional_str(offer_details_obj, 'basePlanId', err)

        # Can either be auto-renewing or prepaid
        is_auto_renewing_plan = 'autoRenewingPlan' in line_item
        is_prepaid_plan       = 'prepaidPlan' in line_item
        if is_prepaid_plan and is_auto_renewing_plan:
            err.msg_list.append('purchases.subscriptionsv2.get line item has both autoRenewingPlan and prepaidPlan keys! This should never happen!')

        auto_renew_enabled = False
        if is_auto_renewing_plan:
            auto_renewing_plan_obj = base.json_dict_require_obj(line_item, 'autoRenewingPlan', err)
            auto_renew_enabled     = base.json_dict_optional_bool(auto_renewing_plan_obj, 'autoRenewEnabled', False, err)

        deferred_item_replacement = None
        deferred_obj              = base.json_dict_optional_obj(line_item, 'deferredItemReplacement', err)
        if deferred_obj is not None:
            deferred_item_replacement = base.json_dict_optional_str(deferred_obj, 'productId', err) or ''

        if not err.has():
            line_items.append(SubscriptionV2DataLineItem(product_id                 = product_id,
                                                         expiry_time                = expiry_time,
                                                         latest_successful_order_id = latest_successful_order_id,
                                                         auto_renew_enabled         = auto_renew_enabled,
                                                         base_plan_id               = base_plan_id,
                                                         deferred_item_replacement  = deferred_item_replacement))

    start_time            = json_dict_optional_google_timestamp(response, 'startTime', err)
    subscription_state    = base.json_dict_require_str_coerce_to_enum(response, 'subscriptionState', SubscriptionsV2State, err)
    linked_purchase_token = base.json_dict_optional_str(response, 'linkedPurchaseToken', err)

    canceled_state_context     = None
    canceled_state_context_obj = base.json_dict_optional_obj(response, 'canceledStateContext', err)
    if canceled_state_context_obj is not None:
        user_cancel_unix_ts_ms          = None
        user_initiated_cancellation_obj = base.json_dict_optional_obj(canceled_state_context_obj, 'userInitiatedCancellation', err)
        if user_initiated_cancellation_obj is not None and 'cancelTime' in user_initiated_cancellation_obj:
            user_cancel_unix_ts_ms = json_dict_require_google_timestamp(user_initiated_cancellation_obj, 'cancelTime', err).unix_milliseconds

        canceled_state_context = SubscriptionsV2CanceledState(
            user_cancel_unix_ts_ms           = user_cancel_unix_ts_ms,
            user_initiated_cancellation      = user_initiated_cancellation_obj is not None,
            system_initiated_cancellation    = json_dict_optional_google_empty_object_bool(canceled_state_context_obj, 'systemInitiatedCancellation', err),
            developer_initiated_cancellation = json_dict_optional_google_empty_object_bool(canceled_state_context_obj, 'developerInitiatedCancellation', err),
            replacement_cancellation         = json_dict_optional_google_empty_object_bool(canceled_state_context_obj, 'replacementCancellation', err))

    external_account_id = ''
    external_ids_obj    = base.json_dict_optional_obj(response, 'externalAccountIdentifiers', err)
    if external_ids_obj is not None:
        external_account_id = base.json_dict_optional_str(external_ids_obj, 'obfuscatedExternalAccountId', err) or ''

    is_test_purchase      = json_dict_optional_google_empty_object_bool(response, 'testPurchase', err)
    acknowledgement_state = base.json_dict_require_str_coerce_to_enum(response, 'acknowledgementState', AcknowledgementState, err)

    if not err.has():
        assert isinstance(subscription_state, SubscriptionsV2State)
        assert isinstance(acknowledgement_state, AcknowledgementState)
        result = SubscriptionV2Data(line_items                     = line_items,
                                    start_time                     = start_time,
                                    subscription_state             = subscription_state,
                                    linked_purchase_token          = linked_purchase_token,
                                    canceled_state_context         = canceled_state_context,
                                    test_purchase                  = is_test_purchase,
                                    acknowledgement_state          = acknowledgement_state,
                                    obfuscated_external_account_id = external_account_id,
                                    raw                            = response)

    assert result is None if err.has() else isinstance(result, SubscriptionV2Data)
    return result

def parse_product_v2(response: typing.Any, err: base.ErrorSink) -> ProductPurchaseV2Data | None:
    result = None
    if not isinstance(response, dict):
        err.msg_list.append('Failed to get product purchase details, result not a dict')
        return result

    kind = base.json_dict_require_str(response, 'kind', err)
    if kind != 'androidpublisher#productPurchaseV2':
        err.msg_list.append(f'purchases.productsv2.get has incorrect kind: {kind}')

    line_items: list[ProductV2LineItem] = []
    for index, line_item in enumerate(base.json_dict_require_array(response, 'productLineItem', err)):
        if not isinstance(line_item, dict):
            err.msg_list.append(f'purchases.productsv2.get productLineItem at index {index} not a dict: {base.safe_dump_arbitrary_value_or_type(line_item)}')
            continue
        product_id         = base.json_dict_require_str(line_item, 'productId', err)
        purchase_option_id = ''
        offer_details_obj  = base.json_dict_optional_obj(line_item, 'productOfferDetails', err)
        if offer_details_obj is not None:
            purchase_option_id = base.json_dict_optional_str(offer_details_obj, 'purchaseOptionId', err) or ''
        line_items.append(ProductV2LineItem(product_id=product_id, purchase_option_id=purchase_option_id))

    purchase_state    = ProductPurchaseState.UNSPECIFIED
    purchase_state_obj = base.json_dict_optional_obj(response, 'purchaseStateContext', err)
    if purchase_state_obj is not None:
        parsed_state = base.json_dict_require_str_coerce_to_enum(purchase_state_obj, 'purchaseState', ProductPurchaseState, err)
        if isinstance(parsed_state, ProductPurchaseState):
            purchase_state = parsed_state

    test_purchase     = False
    test_context_obj  = base.json_dict_optional_obj(response, 'testPurchaseContext', err)
    if test_context_obj is not None:
        test_purchase = base.json_dict_optional_str(test_context_obj, 'fopType', err) == 'TEST'

    acknowledgement_state = AcknowledgementState.UNSPECIFIED
    ack_str               = base.json_dict_optional_str(response, 'acknowledgementState', err)
    if ack_str is not None:
        acknowledgement_state = AcknowledgementState._value2member_map_.get(ack_str, AcknowledgementState.UNSPECIFIED)

    purchase_completion_time = json_dict_optional_google_timestamp(response, 'purchaseCompletionTime', err)
    order_id                 = base.json_dict_optional_str(response, 'orderId', err) or ''
    external_account_id      = base.json_dict_optional_str(response, 'obfuscatedExternalAccountId', err) or ''

    if not err.has():
        result = ProductPurchaseV2Data(line_items                     = line_items,
                                       purchase_state                 = purchase_state,
                                       test_purchase                  = test_purchase,
                                       order_id                       = order_id,
                                       obfuscated_external_account_id = external_account_id,
                                       purchase_completion_time       = purchase_completion_time,
                                       acknowledgement_state          = typing.cast(AcknowledgementState, acknowledgement_state),
                                       raw                            = response)

    assert result is None if err.has() else isinstance(result, ProductPurchaseV2Data)
    return result

def get_subscription_v2(purchase_token: str, err: base.ErrorSink) -> SubscriptionV2Data | None:
    """
    Call the purchases.subscriptionsv2.get endpoint. https://developers.google.com/android-publisher/api-ref/rest/v3/purchases.subscriptionsv2/get
    """
    request  = _purchases().subscriptionsv2().get(packageName=package_name, token=purchase_token)
    response = _execute('purchases.subscriptionsv2.get', request)
    return parse_subscription_v2(response, err)

def get_product_v2(purchase_token: str, err: base.ErrorSink) -> ProductPurchaseV2Data | None:
    """
    Call the purchases.productsv2.get endpoint, unlike purchases.products.get it does not need the
    product id of the purchase.
    """
    request  = _purchases().productsv2().getproductpurchasev2(packageName=package_name, token=purchase_token)
    response = _execute('purchases.productsv2.get', request)
    return parse_product_v2(response, err)

def acknowledge_subscription(product_id: str, purchase_token: str, developer_payload: str | None):
    body    = {'developerPayload': developer_payload} if developer_payload is not None else {}
    request = _purchases().subscriptions().acknowledge(packageName=package_name, subscriptionId=product_id, token=purchase_token, body=body)
    _       = _execute('purchases.subscriptions.acknowledge', request)

def acknowledge_product(product_id: str, purchase_token: str, developer_payload: str | None):
    body    = {'developerPayload': developer_payload} if developer_payload is not None else {}
    request = _purchases().products().acknowledge(packageName=package_name, productId=product_id, token=purchase_token, body=body)
    _       = _execute('purchases.products.acknowledge', request)

def cancel_subscription(product_id: str, purchase_token: str):
    # NOTE: Stops renewals only, the user can restore the subscription from the Play Store later
    request = _purchases().subscriptions().cancel(packageName=package_name, subscriptionId=product_id, token=purchase_token)
    _       = _execute('purchases.subscriptions.cancel', request)

def revoke_subscription(purchase_token: str):
    request = _purchases().subscriptionsv2().revoke(packageName=package_name,
                                                     token=purchase_token,
                                                     body={'revocationContext': {'fullRefund': {}}})
    _       = _execute('purchases.subscriptionsv2.revoke', request)

def refund_order(order_id: str):
    if publisher_service is None:
        raise base.ConfigError('Google service account credentials are not configured')
    request = publisher_service.orders().refund(packageName=package_name, orderId=order_id, revoke=True)
    _       = _execute('orders.refund', request)
