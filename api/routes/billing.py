"""
Billing Routes
Wallet balance and ledger, Stripe top-ups, saved cards and auto top-up
"""
import logging
from typing import Dict, Any, Optional

from fastapi import APIRouter, Depends, Query

from api.middleware.authentication import get_current_user
from api.schemas.billing import TopupRequest, DirectTopupRequest, AutoTopupRequest, PortalRequest
from api.utils.errors import (
    BadRequestError,
    InternalServerError,
    PaymentRequiredError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    require_available,
)
from api.utils.responses import success_response
from database import (
    get_or_create_wallet,
    list_wallet_transactions,
    update_auto_topup_settings,
    disable_auto_topup_for_payment_method,
)
from services.stripe_service import stripe_service, StripeError, payment_method_summary
from services.wallet import (
    wallet_summary,
    auto_topup_settings,
    validate_auto_topup_settings,
    ensure_stripe_customer,
    assert_payment_method_owned,
    direct_topup,
    PaymentMethodOwnershipError,
    TopUpFailedError,
)
from utils.environment import get_app_url
from utils.validation import validate_topup_amount

logger = logging.getLogger(__name__)

router = APIRouter()


def _stripe():
    return require_available(stripe_service, "Payments")


def _stripe_failure(error: StripeError):
    if error.status_code is None or error.status_code >= 500:
        return ServiceUnavailableError("Payment provider error. Please try again later.")
    return BadRequestError(str(error))


def transaction_view(tx: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": tx["id"],
        "type": tx["type"],
        "amountCents": int(tx["amount_cents"]),
        "stripePaymentIntentId": tx.get("stripe_payment_intent_id"),
        "metadata": tx.get("metadata") or {},
        "createdAt": tx.get("created_at"),
    }


@router.get("/wallet")
async def get_wallet_endpoint(user: dict = Depends(get_current_user)):
    wallet = await get_or_create_wallet(user["auth0_user_id"])
    return success_response({"wallet": wallet_summary(wallet)})


@router.get("/wallet/transactions")
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user)
):
    transactions = await list_wallet_transactions(user["auth0_user_id"], limit)
    return success_response({"transactions": [transaction_view(tx) for tx in transactions]})


@router.post("/billing/topup")
@router.post("/wallet/topup")
async def create_checkout_topup(body: TopupRequest, user: dict = Depends(get_current_user)):
    """Hosted Stripe Checkout top-up (handles 3-D Secure)"""
    ok, error = validate_topup_amount(body.amountCents)
    if not ok:
        raise BadRequestError(error)

    stripe = _stripe()
    try:
        customer_id = await ensure_stripe_customer(stripe, user)
        session = await stripe.create_checkout_session(
            customer_id,
            body.amountCents,
            user["auth0_user_id"],
            success_url=get_app_url("/billing?topup=success"),
            cancel_url=get_app_url("/billing?topup=cancelled"),
        )
    except StripeError as e:
        logger.error(f"❌ Checkout session failed for {user['email']}: {e}")
        raise _stripe_failure(e)

    logger.info(f"🧾 Checkout top-up {body.amountCents}c started for {user['email']} ({session.get('id')})")
    return success_response({"url": session.get("url"), "sessionId": session.get("id")})


@router.post("/billing/topup/direct")
async def create_direct_topup(body: DirectTopupRequest, user: dict = Depends(get_current_user)):
    """Charge a saved card; answers requiresAction when the card needs 3-D Secure"""
    ok, error = validate_topup_amount(body.amountCents)
    if not ok:
        raise BadRequestError(error)

    stripe = _stripe()
    try:
        result = await direct_topup(stripe, user, body.amountCents, body.paymentMethodId)
    except PaymentMethodOwnershipError:
        raise ResourceNotFoundError("Payment method")
    except TopUpFailedError as e:
        logger.warning(f"⚠️ Direct top-up declined for {user['email']}: {e}")
        raise PaymentRequiredError(str(e), "PAYMENT_FAILED")
    except StripeError as e:
        raise _stripe_failure(e)

    if result.get("requiresAction"):
        return result
    return success_response(result)


@router.get("/payment-methods")
@router.get("/billing/payment-methods")
async def list_payment_methods(user: dict = Depends(get_current_user)):
    wallet = await get_or_create_wallet(user["auth0_user_id"])
    customer_id = wallet.get("stripe_customer_id") if wallet else None
    if not customer_id or stripe_service is None or not stripe_service.is_available():
        return success_response({"paymentMethods": []})

    try:
        methods = await stripe_service.list_payment_methods(customer_id)
    except StripeError as e:
        raise _stripe_failure(e)
    return success_response({"paymentMethods": [payment_method_summary(pm) for pm in methods]})


@router.post("/payment-methods/setup-intent")
@router.post("/billing/payment-methods/setup-intent")
async def create_setup_intent(user: dict = Depends(get_current_user)):
    stripe = _stripe()
    try:
        customer_id = await ensure_stripe_customer(stripe, user)
        intent = await stripe.create_setup_intent(customer_id)
    except StripeError as e:
        raise _stripe_failure(e)
    return success_response({"clientSecret": intent.get("client_secret")})


@router.delete("/payment-methods/{payment_method_id}")
@router.delete("/billing/payment-methods/{payment_method_id}")
async def delete_payment_method(payment_method_id: str, user: dict = Depends(get_current_user)):
    stripe = _stripe()
    wallet = await get_or_create_wallet(user["auth0_user_id"])
    try:
        await assert_payment_method_owned(stripe, wallet.get("stripe_customer_id") if wallet else None,
                                          payment_method_id)
        await stripe.detach_payment_method(payment_method_id)
    except PaymentMethodOwnershipError:
        raise ResourceNotFoundError("Payment method")
    except StripeError as e:
        raise _stripe_failure(e)

    disabled = await disable_auto_topup_for_payment_method(payment_method_id)
    if disabled:
        logger.info(f"Auto top-up disabled for {user['email']} after card removal")
    return success_response({"removed": payment_method_id})


@router.get("/billing/auto-topup")
async def get_auto_topup(user: dict = Depends(get_current_user)):
    wallet = await get_or_create_wallet(user["auth0_user_id"])
    return success_response({"autoTopup": auto_topup_settings(wallet)})


@router.post("/billing/auto-topup")
@router.patch("/billing/auto-topup")
async def update_auto_topup(body: AutoTopupRequest, user: dict = Depends(get_current_user)):
    ok, error = validate_auto_topup_settings(body.enabled, body.thresholdCents, body.amountCents,
                                             body.paymentMethodId)
    if not ok:
        raise BadRequestError(error)

    wallet = await get_or_create_wallet(user["auth0_user_id"])
    if body.paymentMethodId:
        stripe = _stripe()
        try:
            await assert_payment_method_owned(stripe, wallet.get("stripe_customer_id") if wallet else None,
                                              body.paymentMethodId)
        except PaymentMethodOwnershipError:
            raise BadRequestError("Payment method not found on your account")
        except StripeError as e:
            raise _stripe_failure(e)

    updated = await update_auto_topup_settings(user["auth0_user_id"], body.enabled, body.thresholdCents,
                                               body.amountCents, body.paymentMethodId)
    if not updated:
        logger.error(f"❌ Could not save auto top-up settings for {user['email']}")
        raise InternalServerError("Could not save auto top-up settings. Please try again.")
    logger.info(f"⚙️ Auto top-up {'enabled' if body.enabled else 'disabled'} for {user['email']}")
    return success_response({"autoTopup": auto_topup_settings(updated)})


@router.post("/billing/portal")
async def create_portal_session(body: Optional[PortalRequest] = None, user: dict = Depends(get_current_user)):
    stripe = _stripe()
    return_path = body.returnPath if body and body.returnPath and body.returnPath.startswith("/") else "/billing"
    try:
        customer_id = await ensure_stripe_customer(stripe, user)
        portal = await stripe.create_billing_portal_session(customer_id, get_app_url(return_path))
    except StripeError as e:
        raise _stripe_failure(e)
    return success_response({"url": portal.get("url")})


@router.get("/stripe/publishable-key")
async def get_publishable_key():
    if stripe_service is None or not stripe_service.publishable_key:
        raise ServiceUnavailableError("Payments are not configured")
    return {"publishableKey": stripe_service.publishable_key}


@router.get("/billing/stripe/status")
async def get_stripe_status():
    configured = stripe_service is not None and stripe_service.is_available()
    return {
        "configured": configured,
        "publishableKeyConfigured": bool(stripe_service and stripe_service.publishable_key),
        "webhookConfigured": bool(stripe_service and stripe_service.webhook_secret),
    }
