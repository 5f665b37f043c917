"""aiohttp server exposing the payment endpoints.

Routes live under ``/api/payments/{provider}``. OAuth callbacks always
answer with a redirect to the frontend carrying ``<provider>_success`` or
``<provider>_error``; every other endpoint answers JSON, with
``{"error": ...}`` and the error's status on failure.
"""

import asyncio
import functools
import logging
import signal
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

from aiohttp import web

from sponsorpay.config.settings import AppConfig, get_config
from sponsorpay.db.models import Gateway
from sponsorpay.db.pool import close_pool
from sponsorpay.notifications import NotificationDispatcher, NotificationSender, SlackNotificationSender
from sponsorpay.payments.base import CheckoutRequest, OrganizerStore, SponsorshipStore, SquarePaymentRequest
from sponsorpay.payments.checkout import CheckoutOrchestrator
from sponsorpay.payments.connect import GatewayConnectionService
from sponsorpay.payments.errors import PaymentError, ValidationError
from sponsorpay.payments.gateways import GatewayClientFactory
from sponsorpay.payments.persistence import PostgresOrganizerStore, PostgresSponsorshipStore
from sponsorpay.payments.settlement import SettlementReconciler, organizer_webhook_url
from sponsorpay.payments.tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)

PROVIDER_ROUTE = "/api/payments/{provider:stripe|square}"

# Frontend page each provider's OAuth callback lands on
FRONTEND_PATHS = {
    Gateway.STRIPE: "/dashboard/settings",
    Gateway.SQUARE: "/dashboard",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def json_errors(handler: Handler) -> Handler:
    """Map PaymentError to ``{"error"}`` JSON; anything else becomes a logged 500."""

    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        try:
            return await handler(request)
        except PaymentError as e:
            if e.status_code >= 500:
                logger.error(f"{request.method} {request.path} failed: {e.code}: {e.message}")
            else:
                logger.info(f"{request.method} {request.path} rejected: {e.code}: {e.message}")
            return web.json_response({"error": e.message}, status=e.status_code)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.exception(f"Unhandled error in {request.method} {request.path}: {e}")
            return web.json_response({"error": "Internal server error"}, status=500)

    return wrapper


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _require(value: Any, name: str) -> Any:
    if value in (None, "", []):
        raise ValidationError(f"{name} is required")
    return value


def _redirect_location(config: AppConfig, provider: Gateway, flag: str, value: str) -> str:
    query = urlencode({f"{provider.value}_{flag}": value})
    return f"{config.frontend_url}{FRONTEND_PATHS[provider]}?{query}"


@json_errors
async def connect_endpoint(request: web.Request) -> web.Response:
    """GET /connect?userId= -> {url}"""
    user_id = _require(request.query.get("userId"), "userId")
    service: GatewayConnectionService = request.app["connections"]
    url = service.begin_connect(request.match_info["provider"], user_id)
    return web.json_response({"url": url})


async def callback_endpoint(request: web.Request) -> web.Response:
    """GET /callback?code&state -> 302 to the frontend settings page."""
    config: AppConfig = request.app["config"]
    service: GatewayConnectionService = request.app["connections"]
    provider = Gateway(request.match_info["provider"])

    try:
        result = await service.handle_callback(
            provider,
            code=request.query.get("code"),
            state=request.query.get("state"),
            error=request.query.get("error"),
        )
        if result.ok:
            location = _redirect_location(config, provider, "success", "true")
        else:
            location = _redirect_location(config, provider, "error", result.error)
    except Exception as e:
        logger.exception(f"{provider.value} callback failed: {e}")
        location = _redirect_location(config, provider, "error", "server_error")

    raise web.HTTPFound(location)


@json_errors
async def disconnect_endpoint(request: web.Request) -> web.Response:
    """POST /disconnect {userId} -> {success}"""
    body = await _json_body(request)
    user_id = _require(body.get("userId"), "userId")
    service: GatewayConnectionService = request.app["connections"]
    success = await service.disconnect(request.match_info["provider"], user_id)
    return web.json_response({"success": success})


@json_errors
async def account_status_endpoint(request: web.Request) -> web.Response:
    """GET /account-status?userId= -> connection summary"""
    user_id = _require(request.query.get("userId"), "userId")
    service: GatewayConnectionService = request.app["connections"]
    status = await service.account_status(request.match_info["provider"], user_id)
    return web.json_response(status)


@json_errors
async def create_checkout_endpoint(request: web.Request) -> web.Response:
    """POST /stripe/create-checkout -> {sessionId, url}"""
    body = await _json_body(request)
    metadata = body.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")

    checkout_request = CheckoutRequest(
        organizer_id=_require(body.get("organizerId"), "organizerId"),
        items=body.get("items"),
        success_url=_require(body.get("successUrl"), "successUrl"),
        cancel_url=_require(body.get("cancelUrl"), "cancelUrl"),
        cover_fees=bool(body.get("coverFees")),
        customer_email=body.get("customerEmail"),
        metadata=metadata,
    )
    orchestrator: CheckoutOrchestrator = request.app["checkout"]
    session = await orchestrator.create_checkout(checkout_request)
    return web.json_response({"sessionId": session.session_id, "url": session.url})


@json_errors
async def verify_session_endpoint(request: web.Request) -> web.Response:
    """GET /stripe/verify-session?sessionId -> {verified, count}"""
    session_id = _require(request.query.get("sessionId"), "sessionId")
    reconciler: SettlementReconciler = request.app["settlement"]
    result = await reconciler.verify_stripe_session(session_id)
    if not result.settled:
        return web.json_response({"verified": False, "status": result.provider_status})
    return web.json_response({"verified": True, "count": result.count})


@json_errors
async def process_payment_endpoint(request: web.Request) -> web.Response:
    """POST /square/process-payment -> {success, paymentId, status}"""
    body = await _json_body(request)
    source_id = body.get("sourceId")
    organizer_id = body.get("organizerId")
    raw_amount = body.get("amount")
    if not source_id or not organizer_id or raw_amount in (None, ""):
        raise ValidationError("Missing required payment fields")
    try:
        amount = Decimal(str(raw_amount))
    except InvalidOperation:
        raise ValidationError("amount must be a number")

    sponsorship_ids = body.get("sponsorshipIds") or []
    if not isinstance(sponsorship_ids, list):
        raise ValidationError("sponsorshipIds must be a list")

    orchestrator: CheckoutOrchestrator = request.app["checkout"]
    reconciler: SettlementReconciler = request.app["settlement"]

    payment = await orchestrator.create_payment(
        SquarePaymentRequest(
            organizer_id=organizer_id,
            source_id=source_id,
            amount=amount,
            cover_fees=bool(body.get("coverFees")),
            payer_email=body.get("payerEmail"),
        )
    )
    await reconciler.settle_square_payment(payment, [str(i) for i in sponsorship_ids])
    return web.json_response(
        {"success": True, "paymentId": payment.payment_id, "status": payment.status}
    )


async def health_endpoint(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def _start_dispatcher(app: web.Application) -> None:
    app["dispatcher"].start()


async def _stop_dispatcher(app: web.Application) -> None:
    await app["dispatcher"].stop()


def create_app(
    config: Optional[AppConfig] = None,
    organizers: Optional[OrganizerStore] = None,
    sponsorships: Optional[SponsorshipStore] = None,
    gateways: Optional[GatewayClientFactory] = None,
    sender: Optional[NotificationSender] = None,
) -> web.Application:
    """
    Wire the payment services into an aiohttp application.

    Every collaborator defaults to its production implementation
    (Postgres stores, real provider clients, Slack sender) and can be
    replaced for tests.
    """
    config = config or get_config()
    organizers = organizers or PostgresOrganizerStore()
    sponsorships = sponsorships or PostgresSponsorshipStore()
    gateways = gateways or GatewayClientFactory(config)
    dispatcher = NotificationDispatcher(
        sender or SlackNotificationSender(),
        functools.partial(organizer_webhook_url, organizers),
        maxsize=config.notification_queue_size,
    )
    tokens = TokenLifecycleManager(organizers, gateways)

    app = web.Application()
    app["config"] = config
    app["dispatcher"] = dispatcher
    app["connections"] = GatewayConnectionService(config, organizers, gateways)
    app["checkout"] = CheckoutOrchestrator(config, organizers, gateways, tokens)
    app["settlement"] = SettlementReconciler(
        sponsorships,
        gateways,
        dispatcher=dispatcher,
        dashboard_url=f"{config.frontend_url}/dashboard",
    )

    app.router.add_get("/health", health_endpoint)
    app.router.add_get(f"{PROVIDER_ROUTE}/connect", connect_endpoint)
    app.router.add_get(f"{PROVIDER_ROUTE}/callback", callback_endpoint)
    app.router.add_post(f"{PROVIDER_ROUTE}/disconnect", disconnect_endpoint)
    app.router.add_get(f"{PROVIDER_ROUTE}/account-status", account_status_endpoint)
    app.router.add_post("/api/payments/stripe/create-checkout", create_checkout_endpoint)
    app.router.add_get("/api/payments/stripe/verify-session", verify_session_endpoint)
    app.router.add_post("/api/payments/square/process-payment", process_payment_endpoint)

    app.on_startup.append(_start_dispatcher)
    app.on_cleanup.append(_stop_dispatcher)
    return app


async def run_server(shutdown_event: Optional[asyncio.Event] = None) -> None:
    """
    Serve the payments API until ``shutdown_event`` is set.

    Args:
        shutdown_event: Optional event to signal shutdown; runs forever if None
    """
    config = get_config()
    app = create_app(config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", config.server_port)
    await site.start()

    logger.info(f"Payments server listening on port {config.server_port}")

    if shutdown_event:
        await shutdown_event.wait()
    else:
        await asyncio.Event().wait()

    logger.info("Shutting down payments server...")
    await runner.cleanup()
    await close_pool()


def main() -> None:
    """
    Run the payments server as a standalone process.

    Blocks until SIGTERM/SIGINT received.
    """
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop.run_until_complete(run_server(shutdown_event=shutdown_event))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        loop.close()
        logger.info("Payments server stopped")


if __name__ == "__main__":
    main()
