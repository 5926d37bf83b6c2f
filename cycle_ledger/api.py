"""
Cycle Ledger API Application

REST surface over the ledger system: institutions, cycles, transactions and
the loop simulator. Ledger errors are rendered as {"error", "code"} with 404
for missing resources and 400 for everything else.
"""

from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .config import get_config
from .errors import LedgerError, NotFoundError
from .institutions import IconUpload
from .logging_config import get_logger, log_action
from .schemas import (
    CreateTransactionRequest, CycleRequest, SimulationRequest, UpdateTransactionRequest,
)
from .system import LedgerSystem

logger = get_logger("cycle_ledger.api")

router = APIRouter()


def get_ledger_system(request: Request) -> LedgerSystem:
    """Dependency returning the app's ledger system, built from config on first use"""
    system = request.app.state.ledger_system
    if system is None:
        system = LedgerSystem(config=get_config())
        request.app.state.ledger_system = system
    return system


# Institutions
@router.get("/institutions")
async def list_institutions(system: LedgerSystem = Depends(get_ledger_system)):
    """List institutions sorted by name"""
    return [institution.to_dict()
            for institution in system.institution_manager.list_institutions()]


@router.post("/institutions")
async def create_institution(
    name: str = Form(..., min_length=1, max_length=255),
    icon: Optional[UploadFile] = File(None),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create an institution (multipart form, optional image icon)"""
    upload = None
    if icon is not None and icon.filename:
        upload = IconUpload(
            filename=icon.filename,
            content_type=icon.content_type or "",
            content=await icon.read(),
        )
    institution = system.institution_manager.create_institution(name, upload)
    return institution.to_dict()


@router.get("/institutions/icon/{file_name}")
async def get_institution_icon(
    file_name: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Serve an institution icon"""
    try:
        content, content_type = system.institution_manager.get_institution_icon(file_name)
    except LedgerError:
        raise NotFoundError("Institution icon not found")
    return Response(
        content=content,
        media_type=content_type,
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )


# Cycles
@router.get("/cycles")
async def list_cycles(system: LedgerSystem = Depends(get_ledger_system)):
    return [cycle.to_dict() for cycle in system.cycle_manager.list_cycles()]


@router.post("/cycles")
async def create_cycle(request: CycleRequest, system: LedgerSystem = Depends(get_ledger_system)):
    return system.cycle_manager.create_cycle(request.name).to_dict()


@router.patch("/cycles/{cycle_id}")
async def rename_cycle(
    cycle_id: str,
    request: CycleRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    return system.cycle_manager.rename_cycle(cycle_id, request.name).to_dict()


@router.delete("/cycles/{cycle_id}")
async def delete_cycle(cycle_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    result = system.cycle_manager.delete_cycle(cycle_id)
    return {"success": result["success"]}


@router.post("/cycles/{cycle_id}/reset")
async def reset_cycle(cycle_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return system.cycle_manager.reset_cycle(cycle_id)


@router.post("/cycles/{cycle_id}/undo-last")
async def undo_last_transaction(cycle_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return system.cycle_manager.undo_last_transaction(cycle_id)


@router.get("/cycles/{cycle_id}/balance")
async def get_cycle_balance(cycle_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    balance = system.cycle_manager.get_cycle_balance(cycle_id)
    return {"cycle_id": cycle_id, "balance": str(balance)}


# Transactions
@router.get("")
async def list_transactions(
    cycle_id: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List transactions in chronological order, optionally for one cycle"""
    return system.transaction_service.list_transaction_views(cycle_id)


@router.post("")
async def create_transaction(
    request: CreateTransactionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create a transaction; a settlement returns both legs"""
    service = system.transaction_service
    result = service.create_transaction(request.to_input())
    if isinstance(result, tuple):
        return [service.to_view(leg) for leg in result]
    return service.to_view(result)


@router.patch("/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    request: UpdateTransactionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    service = system.transaction_service
    return service.to_view(service.update_transaction(transaction_id, request.to_input()))


@router.delete("/{transaction_id}")
async def delete_transaction(transaction_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return system.transaction_service.delete_transaction(transaction_id)


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Cycle Ledger API",
        description="Currency-arbitrage cycle ledger and loop simulator",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.ledger_system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = 404 if isinstance(exc, NotFoundError) else 400
        log_action(
            logger, "warning", exc.message,
            action="request_rejected", resource=request.url.path,
            extra={"code": exc.code, "status": status_code}
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(router, prefix="/transactions", tags=["Transactions"])

    @app.post("/simulate", tags=["Simulator"])
    async def simulate(
        request: SimulationRequest,
        ledger: LedgerSystem = Depends(get_ledger_system)
    ):
        """Project repeated arbitrage loops"""
        return ledger.simulate(request.to_raw()).to_dict()

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "cycle_ledger_api",
            "version": __version__
        }

    return app


# Create the app instance for uvicorn
app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False,
               log_level: str = "info"):
    """Run the FastAPI server"""
    uvicorn.run(
        "cycle_ledger.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level=log_level.lower()
    )
