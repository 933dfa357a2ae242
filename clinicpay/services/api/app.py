"""HTTP surface: appointments, payment links, provider webhooks and health checks."""

from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from clinicpay.common.errors import AppError, ValidationError
from clinicpay.common.logging import correlation_id_ctx, logger
from clinicpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from clinicpay.services.api.container import Services
from clinicpay.services.api.deps import (
    Caller,
    enforce_rate_limit,
    get_caller,
    require_doctor,
    require_internal,
)
from clinicpay.services.appointments.schemas import (
    AppointmentCreateRequest,
    AppointmentListResponse,
    AppointmentResponse,
)
from clinicpay.services.deadletter.schemas import DeadLetterDetail, DeadLetterListResponse, DeadLetterSummary
from clinicpay.services.orchestrator.schemas import (
    PaymentLinkRequest,
    PaymentLinkResponse,
    PaymentOrderResponse,
    ReconciliationReport,
)
from clinicpay.services.webhooks.results import status_code_for

CORRELATION_HEADER = "X-Correlation-ID"


def error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}, "correlation_id": correlation_id_ctx.get() or None}


def create_app(services: Services, lifespan=None) -> FastAPI:
    app = FastAPI(title="Clinic Payments API", lifespan=lifespan)
    app.state.services = services
    service_name = services.service_name

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        """Bind a correlation id and record request count/latency."""

        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid4())
        correlation_id_ctx.set(correlation_id)
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name, route=route, method=method, status_code=str(status_code)
            ).inc()

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("request_failed code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        message = "Invalid request: " + ", ".join(fields) if fields else "Invalid request"
        return JSONResponse(status_code=400, content=error_body(ValidationError.code, message))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("request_crashed path=%s", request.url.path)
        return JSONResponse(status_code=500, content=error_body("internal_error", "Internal server error"))

    # -- appointments --------------------------------------------------------

    @app.post("/appointments", status_code=201, response_model=AppointmentResponse)
    def book_appointment(req: AppointmentCreateRequest, request: Request, caller: Caller = Depends(get_caller)):
        """Reserve a pending slot for the calling doctor (or any doctor for internal callers)."""

        enforce_rate_limit(request, caller)
        doctor_id = req.doctor_id or caller.doctor_id
        if not doctor_id:
            raise ValidationError("doctor_id is required")
        appointment = services.appointments.book(
            doctor_id=doctor_id,
            patient_name=req.patient_name,
            patient_phone=req.patient_phone,
            starts_at=req.starts_at,
            notes=req.notes,
            patient_id=req.patient_id,
            actor_id=caller.doctor_id,
        )
        return AppointmentResponse.model_validate(appointment)

    @app.get("/appointments", response_model=AppointmentListResponse)
    def list_appointments(status: str | None = None, caller: Caller = Depends(get_caller)):
        rows = services.appointments.list_for_doctor(require_doctor(caller), status=status)
        return AppointmentListResponse(items=[AppointmentResponse.model_validate(row) for row in rows])

    @app.get("/appointments/{appointment_id}", response_model=AppointmentResponse)
    def get_appointment(appointment_id: str, caller: Caller = Depends(get_caller)):
        appointment = services.appointments.get(appointment_id, require_doctor(caller))
        return AppointmentResponse.model_validate(appointment)

    @app.post("/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
    def cancel_appointment(appointment_id: str, caller: Caller = Depends(get_caller)):
        appointment = services.appointments.cancel(appointment_id, require_doctor(caller))
        return AppointmentResponse.model_validate(appointment)

    @app.post("/appointments/{appointment_id}/complete", response_model=AppointmentResponse)
    def complete_appointment(appointment_id: str, caller: Caller = Depends(get_caller)):
        appointment = services.appointments.complete(appointment_id, require_doctor(caller))
        return AppointmentResponse.model_validate(appointment)

    # -- payments ------------------------------------------------------------

    @app.post("/payments/create-link", status_code=201, response_model=PaymentLinkResponse)
    def create_payment_link(req: PaymentLinkRequest, request: Request, caller: Caller = Depends(get_caller)):
        """Mint the checkout link through the gateway chosen by doctor region."""

        enforce_rate_limit(request, caller)
        result = services.orchestrator.create_payment_link(
            appointment_id=req.appointment_id,
            amount_minor=req.amount_minor,
            currency=req.currency,
            doctor_region=req.doctor_region,
            actor_id=caller.doctor_id,
        )
        return PaymentLinkResponse(url=result.url, order_id=result.order_id, gateway=result.gateway)

    @app.get("/payments/{order_id}", response_model=PaymentOrderResponse)
    def get_payment(order_id: str, caller: Caller = Depends(get_caller)):
        order = services.orchestrator.get_payment(order_id, require_doctor(caller))
        return PaymentOrderResponse.model_validate(order)

    # -- reconciliation ------------------------------------------------------

    @app.get("/internal/reconciliation", response_model=ReconciliationReport)
    def reconciliation(limit: int = Query(default=100, ge=1, le=1000), caller: Caller = Depends(get_caller)):
        """Failed ledger rows and paid orders whose booking never confirmed."""

        require_internal(caller)
        return services.orchestrator.reconciliation_report(limit=limit)

    @app.post("/internal/payments/expire-stale")
    def expire_stale_orders(caller: Caller = Depends(get_caller)):
        require_internal(caller)
        return {"expired": services.orchestrator.expire_stale_orders()}

    @app.get("/internal/dead-letters", response_model=DeadLetterListResponse)
    def list_dead_letters(
        provider: str | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
        caller: Caller = Depends(get_caller),
    ):
        """Dead-lettered deliveries, newest first, without their bodies."""

        require_internal(caller)
        return DeadLetterListResponse(items=services.dead_letters.list_recent(provider=provider, limit=limit))

    @app.get("/internal/dead-letters/{dead_letter_id}", response_model=DeadLetterDetail)
    def get_dead_letter(dead_letter_id: str, caller: Caller = Depends(get_caller)):
        require_internal(caller)
        return services.dead_letters.get(dead_letter_id)

    @app.post("/internal/dead-letters/{dead_letter_id}/reprocess", status_code=202, response_model=DeadLetterSummary)
    def reprocess_dead_letter(dead_letter_id: str, caller: Caller = Depends(get_caller)):
        require_internal(caller)
        return services.dead_letters.request_reprocess(dead_letter_id)

    # -- webhooks ------------------------------------------------------------

    @app.get("/webhooks/instagram", response_class=PlainTextResponse)
    def verify_instagram_subscription(
        mode: str | None = Query(default=None, alias="hub.mode"),
        token: str | None = Query(default=None, alias="hub.verify_token"),
        challenge: str | None = Query(default=None, alias="hub.challenge"),
    ):
        """Meta subscription handshake: echo the challenge when the token matches."""

        return PlainTextResponse(services.instagram.verify_subscription(mode, token, challenge))

    @app.post("/webhooks/{provider}")
    async def receive_webhook(provider: str, request: Request):
        """Signed provider delivery. The raw bytes are what the signature covers."""

        raw_body = await request.body()
        result = await run_in_threadpool(
            services.dispatcher.dispatch,
            provider,
            raw_body,
            dict(request.headers),
            correlation_id_ctx.get(),
        )
        status_code = status_code_for(result)
        if status_code != 200:
            return JSONResponse(
                status_code=status_code, content=error_body(result.outcome, result.detail or result.outcome)
            )
        return JSONResponse(
            status_code=200,
            content={"status": result.outcome, "event_id": result.event_id, "correlation_id": correlation_id_ctx.get()},
        )

    # -- health --------------------------------------------------------------

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app
