"""Port broker API built with FastAPI.

This module exposes endpoints to manage distribution boxes and their
ports and to drive rental orders through their lifecycle. Validation is
performed with Pydantic models, while every business rule is delegated to
``service.PortBrokerService``. Engine errors are rendered as
``{"detail": CODE, "message": text}`` with the status code they carry.

The caller's identity comes from the ``X-Operator-Id`` and
``X-Operator-Role`` headers set by the upstream authentication layer.
"""

import logging
import uuid
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse

from . import config
from .adapters import HeaderIdentity
from .capabilities import require_actor
from .db import get_engine, init_db, make_session_factory, wait_for_db
from .domain import Actor, BoxStatus, Direction, OrderStatus
from .errors import PortBrokerError
from .logging_filters import REQUEST_ID_CTX, configure_logging
from .schemas import (
    BoxCreate,
    BoxOut,
    BoxUpdate,
    DecisionIn,
    MaintenanceIn,
    NoteIn,
    NoteOut,
    OccupancyOut,
    OrderCreate,
    OrderOut,
    PortOut,
    PriceIn,
    ScheduleIn,
    ServicePlanIn,
    TransitionIn,
)
from .service import PortBrokerService

logger = logging.getLogger("portbroker.api")


def get_service(request: Request) -> PortBrokerService:
    return request.app.state.service


def current_actor(request: Request) -> Actor:
    """Resolve the operator from the request headers.

    Raises:
        Unauthenticated: If no ``X-Operator-Id`` header was sent.
    """
    return require_actor(HeaderIdentity(request.headers).current_actor())


ServiceDep = Annotated[PortBrokerService, Depends(get_service)]
ActorDep = Annotated[Actor, Depends(current_actor)]


def create_app(service: Optional[PortBrokerService] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        service: Service to serve. When omitted, the database is awaited,
            its schema created and a service built on startup.

    Returns:
        FastAPI: The configured application.
    """
    configure_logging()
    app = FastAPI(title="Port Broker")
    app.state.service = service

    if service is None:

        @app.on_event("startup")
        def _startup_db():
            engine = get_engine()
            wait_for_db(engine)
            init_db(engine)
            app.state.service = PortBrokerService(make_session_factory(engine))

    @app.exception_handler(PortBrokerError)
    async def _broker_error(request: Request, exc: PortBrokerError):
        if exc.status_code >= 500:
            logger.error("request failed", extra={"code": exc.code, "path": request.url.path})
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.code, "message": exc.detail},
        )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        token = REQUEST_ID_CTX.set(rid)
        try:
            clen = request.headers.get("content-length")
            if clen and clen.isdigit() and int(clen) > config.API_MAX_BYTES:
                response = JSONResponse({"detail": "PAYLOAD_TOO_LARGE"}, status_code=413)
            else:
                response = await call_next(request)
        finally:
            logger.info(
                "request handled",
                extra={"request_id": rid, "path": request.url.path, "method": request.method},
            )
            REQUEST_ID_CTX.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health():
        """Answer load balancer checks; touches neither the database nor the service."""
        return {"ok": True}

    # ---- boxes ----
    @app.post("/boxes", response_model=BoxOut, status_code=201)
    def create_box(req: BoxCreate, svc: ServiceDep, actor: ActorDep):
        """Create a box and provision ``capacity`` available ports."""
        box = svc.create_box(
            actor,
            req.name,
            req.capacity,
            req.latitude,
            req.longitude,
            owner_id=req.owner_id,
            status=req.status,
        )
        return BoxOut.model_validate(box)

    @app.get("/boxes", response_model=list[BoxOut])
    def list_boxes(
        svc: ServiceDep,
        actor: ActorDep,
        search: Optional[str] = None,
        status: Optional[BoxStatus] = None,
        owner_id: Optional[str] = None,
    ):
        boxes = svc.list_boxes(actor, search=search, status=status, owner_id=owner_id)
        return [BoxOut.model_validate(b) for b in boxes]

    @app.get("/boxes/{box_id}", response_model=BoxOut)
    def get_box(box_id: uuid.UUID, svc: ServiceDep, actor: ActorDep):
        return BoxOut.model_validate(svc.get_box(actor, box_id))

    @app.patch("/boxes/{box_id}", response_model=BoxOut)
    def update_box(box_id: uuid.UUID, req: BoxUpdate, svc: ServiceDep, actor: ActorDep):
        """Edit box metadata; ``capacity`` may only grow."""
        box = svc.update_box(actor, box_id, **req.model_dump(exclude_none=True))
        return BoxOut.model_validate(box)

    @app.delete("/boxes/{box_id}", status_code=204)
    def delete_box(box_id: uuid.UUID, svc: ServiceDep, actor: ActorDep):
        svc.delete_box(actor, box_id)
        return Response(status_code=204)

    @app.get("/boxes/{box_id}/ports", response_model=list[PortOut])
    def list_ports(box_id: uuid.UUID, svc: ServiceDep, actor: ActorDep):
        return [PortOut.model_validate(p) for p in svc.list_ports(actor, box_id)]

    @app.get("/boxes/{box_id}/occupancy", response_model=OccupancyOut)
    def occupancy(box_id: uuid.UUID, svc: ServiceDep, actor: ActorDep):
        return OccupancyOut.model_validate(svc.occupancy(actor, box_id))

    # ---- ports ----
    @app.get("/ports/{port_id}", response_model=PortOut)
    def get_port(port_id: uuid.UUID, svc: ServiceDep, actor: ActorDep):
        return PortOut.model_validate(svc.get_port(actor, port_id))

    @app.put("/ports/{port_id}/price", response_model=PortOut)
    def set_port_price(port_id: uuid.UUID, req: PriceIn, svc: ServiceDep, actor: ActorDep):
        return PortOut.model_validate(svc.set_port_price(actor, port_id, req.price_cents))

    @app.put("/ports/{port_id}/maintenance", response_model=PortOut)
    def set_port_maintenance(
        port_id: uuid.UUID, req: MaintenanceIn, svc: ServiceDep, actor: ActorDep
    ):
        return PortOut.model_validate(svc.set_port_maintenance(actor, port_id, req.enabled))

    @app.put("/ports/{port_id}/service-plan", response_model=PortOut)
    def set_port_service_plan(
        port_id: uuid.UUID, req: ServicePlanIn, svc: ServiceDep, actor: ActorDep
    ):
        return PortOut.model_validate(svc.set_port_service_plan(actor, port_id, req.plan))

    # ---- orders ----
    @app.post("/orders", response_model=OrderOut, status_code=201)
    def create_order(
        req: OrderCreate,
        response: Response,
        svc: ServiceDep,
        actor: ActorDep,
        idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
    ):
        """Open a rental request for a port, with optional idempotency.

        When an ``Idempotency-Key`` header is provided, retries with the
        same payload return the order created by the first request and the
        ``Idempotent-Replay: true`` header. Reusing the key with a different
        payload answers 409 ``IDEMPOTENCY_CONFLICT``.
        """
        if not idempotency_key:
            order = svc.create_order(
                actor, req.port_id, req.price_cents, req.installation_fee_cents, note=req.note
            )
            return OrderOut.model_validate(order)

        order, replayed = svc.create_order_idempotent(
            actor,
            req.port_id,
            idempotency_key,
            req.price_cents,
            req.installation_fee_cents,
            req.note,
        )
        if replayed:
            response.status_code = 200
            response.headers["Idempotent-Replay"] = "true"
        return OrderOut.model_validate(order)

    @app.get("/orders", response_model=list[OrderOut])
    def list_orders(
        svc: ServiceDep,
        actor: ActorDep,
        status: Optional[OrderStatus] = None,
        direction: Direction = Direction.ALL,
        port_id: Optional[uuid.UUID] = None,
        box_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
    ):
        """List visible orders, most recently updated first.

        ``search`` matches part of the box name, the requester or the owner.
        """
        orders = svc.list_orders(
            actor,
            status=status,
            direction=direction,
            port_id=port_id,
            box_id=box_id,
            search=search,
        )
        return [OrderOut.model_validate(o) for o in orders]

    @app.get("/orders/{order_id}", response_model=OrderOut)
    def get_order(order_id: uuid.UUID, svc: ServiceDep, actor: ActorDep):
        return OrderOut.model_validate(svc.get_order(actor, order_id))

    @app.post("/orders/{order_id}/decision", response_model=OrderOut)
    def decide_order(order_id: uuid.UUID, req: DecisionIn, svc: ServiceDep, actor: ActorDep):
        return OrderOut.model_validate(svc.decide_order(actor, order_id, req.approve, req.note))

    @app.post("/orders/{order_id}/signature", response_model=OrderOut)
    def sign_contract(
        order_id: uuid.UUID,
        svc: ServiceDep,
        actor: ActorDep,
        req: Optional[TransitionIn] = None,
    ):
        note = req.note if req else None
        return OrderOut.model_validate(svc.sign_contract(actor, order_id, note))

    @app.post("/orders/{order_id}/schedule", response_model=OrderOut)
    def schedule_installation(
        order_id: uuid.UUID, req: ScheduleIn, svc: ServiceDep, actor: ActorDep
    ):
        return OrderOut.model_validate(
            svc.schedule_installation(actor, order_id, req.scheduled_at, req.note)
        )

    @app.post("/orders/{order_id}/advance", response_model=OrderOut)
    def advance_installation(
        order_id: uuid.UUID,
        svc: ServiceDep,
        actor: ActorDep,
        req: Optional[TransitionIn] = None,
    ):
        note = req.note if req else None
        return OrderOut.model_validate(svc.advance_installation(actor, order_id, note))

    @app.post("/orders/{order_id}/cancel", response_model=OrderOut)
    def cancel_order(
        order_id: uuid.UUID,
        svc: ServiceDep,
        actor: ActorDep,
        req: Optional[TransitionIn] = None,
    ):
        note = req.note if req else None
        return OrderOut.model_validate(svc.cancel_order(actor, order_id, note))

    @app.post("/orders/{order_id}/notes", response_model=NoteOut, status_code=201)
    def add_note(order_id: uuid.UUID, req: NoteIn, svc: ServiceDep, actor: ActorDep):
        return NoteOut.model_validate(svc.add_note(actor, order_id, req.content))

    @app.get("/orders/{order_id}/notes", response_model=list[NoteOut])
    def list_notes(order_id: uuid.UUID, svc: ServiceDep, actor: ActorDep):
        return [NoteOut.model_validate(n) for n in svc.list_notes(actor, order_id)]


app = create_app()
